from __future__ import annotations
import asyncio
import io
import os
import smtplib
from dataclasses import dataclass, field
from email.message import EmailMessage
from email.utils import make_msgid
from typing import Dict, List, Optional, Protocol as TypingProtocol

import jinja2
import segno
import structlog

from .config import Settings
from .errors import Upstream
from .helpers import format_money
from .model.catalog.orm import TicketGroup
from .model.order.orm import OrderTicketGroup, OrderTicketInfo


log = structlog.get_logger(__name__)

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")

_env = jinja2.Environment(
    loader=jinja2.FileSystemLoader(TEMPLATES_DIR),
    autoescape=jinja2.select_autoescape(["html"]),
)

TEXTS: Dict[str, Dict[str, str]] = {
    "en": {
        "subject": "Your %s Tickets",
        "greeting": "Dear %s,",
        "thank_you": "Thank you for your purchase. Here are your tickets for %s:",
        "summary": "Order Summary",
        "order_no": "Order No",
        "item": "Item",
        "quantity": "Quantity",
        "price": "Price (RM)",
        "entry_date": "Entry Date",
        "total": "Total (RM)",
        "ticket": "Ticket",
        "present": "Please present the QR code at the entrance.",
        "contact": "Contact Us",
    },
    "bm": {
        "subject": "Tiket %s Anda",
        "greeting": "Kepada %s,",
        "thank_you": "Terima kasih atas pembelian anda. Berikut adalah tiket anda untuk %s:",
        "summary": "Ringkasan Pesanan",
        "order_no": "No. Pesanan",
        "item": "Item",
        "quantity": "Kuantiti",
        "price": "Harga (RM)",
        "entry_date": "Tarikh Masuk",
        "total": "Jumlah (RM)",
        "ticket": "Tiket",
        "present": "Sila tunjukkan kod QR di pintu masuk.",
        "contact": "Hubungi Kami",
    },
    "cn": {
        "subject": "Your %s Tickets",
        "greeting": "亲爱的%s，",
        "thank_you": "感谢您的购买。以下是您的%s门票：",
        "summary": "订单摘要",
        "order_no": "订单号",
        "item": "项目",
        "quantity": "数量",
        "price": "价格 (RM)",
        "entry_date": "入场日期",
        "total": "总计 (RM)",
        "ticket": "门票",
        "present": "请在入口处出示二维码。",
        "contact": "联系我们",
    },
}

VENUES = {
    "zoo": {
        "name": "Zoo Johor",
        "address": "Jalan Gertak Merah, Taman Istana, 80000 Johor Bahru, Johor",
        "phone": "+607-223 0404",
        "email": "zoojohor@johor.gov.my",
    },
    "botani": {
        "name": "Taman Botani Diraja Johor",
        "address": "Istana Besar Johor, 80000 Johor Bahru, Johor",
        "phone": "+607-485 8101",
        "email": "botani.johor@gmail.com",
    },
}


@dataclass
class Attachment:
    filename: str
    content: bytes
    mime_type: str = "image/png"
    content_id: Optional[str] = None


@dataclass
class TicketEmail:
    to: str
    subject: str
    html: str
    text: str
    order_no: str
    attachments: List[Attachment] = field(default_factory=list)
    pdf: Optional[Attachment] = None


def qr_png(content: str, scale: int = 5) -> bytes:
    buf = io.BytesIO()
    segno.make_qr(content, error="m").save(buf, kind="png", scale=scale, border=2)
    return buf.getvalue()


def _desc(line: OrderTicketInfo, lang: str) -> str:
    by_lang = {
        "bm": line.item_desc1,
        "en": line.item_desc2,
        "cn": line.item_desc3,
    }
    return (
        by_lang.get(lang)
        or line.item_desc2 or line.item_desc1 or line.item_desc3
        or line.item_id
    )


def _venue(group: TicketGroup) -> Dict[str, str]:
    base = VENUES["zoo"] if group.group_name == "Zoo Johor" else VENUES["botani"]
    venue = dict(base)
    if group.location_address:
        venue["address"] = group.location_address
    if group.organiser_contact:
        venue["phone"] = group.organiser_contact
    if group.organiser_email:
        venue["email"] = group.organiser_email
    return venue


def build_ticket_email(
    order: OrderTicketGroup,
    group: TicketGroup,
    lines: List[OrderTicketInfo],
) -> TicketEmail:
    lang = order.lang_chosen if order.lang_chosen in TEXTS else "en"
    texts = TEXTS[lang]
    venue_name = group.display_name(lang)

    items: Dict[str, Dict] = {}
    for line in lines:
        row = items.get(line.item_id)
        if row is None:
            row = items[line.item_id] = {
                "description": _desc(line, lang),
                "quantity": 0,
                "price": format_money(line.unit_price),
                "entry_date": line.admit_date,
            }
        row["quantity"] += line.quantity_bought

    attachments: List[Attachment] = []
    tickets = []
    for n, line in enumerate(lines, start=1):
        cid = make_msgid(idstring=f"qr{n}", domain="jticketing")[1:-1]
        attachments.append(Attachment(
            filename=f"{order.order_no}-{n}.png",
            content=qr_png(line.encrypted_id),
            content_id=cid,
        ))
        tickets.append({
            "number": n,
            "description": _desc(line, lang),
            "entry_date": line.admit_date,
            "cid": cid,
        })

    buyer = order.buyer_name or order.buyer_email
    context = {
        "texts": texts,
        "greeting": texts["greeting"] % buyer,
        "thank_you": texts["thank_you"] % venue_name,
        "order_no": order.order_no,
        "items": list(items.values()),
        "total": format_money(order.total_amount),
        "tickets": tickets,
        "venue": _venue(group),
    }
    html = _env.get_template("ticket_email.html").render(**context)
    text = "\n".join([
        context["greeting"],
        "",
        context["thank_you"],
        f"{texts['order_no']}: {order.order_no}",
        *(f"- {i['description']} x{i['quantity']} @ {i['price']}"
          f" ({i['entry_date']})" for i in items.values()),
        f"{texts['total']}: {context['total']}",
    ])
    return TicketEmail(
        to=order.buyer_email,
        subject=texts["subject"] % venue_name,
        html=html,
        text=text,
        order_no=order.order_no,
        attachments=attachments,
    )


# ----------------------------
# Sinks
# ----------------------------
class NotificationSink(TypingProtocol):
    async def send(self, message: TicketEmail) -> None:
        """Return only once the message was accepted for delivery."""
        ...


class LogSink:
    """Development sink: accepts everything and logs it."""

    async def send(self, message: TicketEmail) -> None:
        log.info("mail.accepted", to=message.to, subject=message.subject,
                 order_no=message.order_no,
                 attachments=len(message.attachments))


class SmtpSink:
    def __init__(self, settings: Settings) -> None:
        self.host = settings.smtp_host
        self.port = settings.smtp_port
        self.user = settings.smtp_user
        self.password = settings.smtp_pass
        self.sender = settings.smtp_from
        self.ssl = settings.smtp_ssl

    def _compose(self, message: TicketEmail) -> EmailMessage:
        msg = EmailMessage()
        msg["Subject"] = message.subject
        msg["From"] = self.sender
        msg["To"] = message.to
        msg.set_content(message.text)
        msg.add_alternative(message.html, subtype="html")
        html_part = msg.get_payload()[1]
        for att in message.attachments:
            maintype, subtype = att.mime_type.split("/", 1)
            html_part.add_related(
                att.content, maintype=maintype, subtype=subtype,
                cid=f"<{att.content_id}>", filename=att.filename,
            )
        if message.pdf is not None:
            msg.add_attachment(
                message.pdf.content, maintype="application", subtype="pdf",
                filename=message.pdf.filename,
            )
        return msg

    def _deliver(self, msg: EmailMessage) -> None:
        if self.ssl:
            server = smtplib.SMTP_SSL(self.host, self.port, timeout=60)
        else:
            server = smtplib.SMTP(self.host, self.port, timeout=60)
        with server:
            if not self.ssl:
                server.starttls()
            if self.user:
                server.login(self.user, self.password)
            server.send_message(msg)

    async def send(self, message: TicketEmail) -> None:
        msg = self._compose(message)
        try:
            await asyncio.to_thread(self._deliver, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise Upstream("mail delivery failed", detail=repr(e)) from e
        log.info("mail.sent", to=message.to, order_no=message.order_no)


def new_sink(settings: Settings) -> NotificationSink:
    if settings.mail_backend == "smtp":
        return SmtpSink(settings)
    return LogSink()
