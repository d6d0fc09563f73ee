"""
Order lifecycle engine.

Owns ``transaction_status``, ``total_amount`` and the bank fields of an
order. Creation validates everything before a single row is written;
gateway callbacks move the status along

    initiate -> success | pending | failed
    pending  -> success | failed

and anything that would step outside that graph is ignored.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Mapping, Optional, Tuple

import structlog

from .config import Settings
from .errors import (
    DuplicateCreation, OrderNotFound, ValidationFailed,
)
from .gateway import PaymentGateway, RedirectForm, interpret_callback
from .helpers import (
    CENT, format_money, is_valid_email, malaysia_stamp, new_reference,
    parse_date_strict,
)
from .model.catalog.orm import Customer, TicketGroup
from .model.order.orm import OrderTicketGroup, OrderTicketInfo, OrderTicketLog
from .model.order.store import OrderStore
from .resolver import Variant, VariantResolver
from .schemas import MAX_TICKETS, FreeOrderRequest, PaidOrderRequest


log = structlog.get_logger(__name__)

LANGS = ("bm", "en", "cn")
PAYMENT_TYPES = ("credit/debit", "fpx")

# target status -> statuses it may be entered from
PREDECESSORS: Dict[str, Tuple[str, ...]] = {
    "success": ("initiate", "pending"),
    "failed": ("initiate", "pending"),
    "pending": ("initiate",),
}

PAYMENT_LOG_TITLES = {
    "success": "Payment Success",
    "pending": "Payment Pending",
    "failed": "Payment Failed",
}


@dataclass
class Buyer:
    identification_no: str = ""
    full_name: str = ""
    email: str = ""
    contact_no: str = ""


@dataclass
class OrderView:
    order: OrderTicketGroup
    lines: List[OrderTicketInfo]
    logs: List[OrderTicketLog]


@dataclass
class _Priced:
    group: TicketGroup
    visit_date: str
    lang: str
    buyer: Buyer
    requested: Dict[str, int]
    variants: Dict[str, Variant]
    total: Decimal


def _clean(value: Optional[str]) -> str:
    return (value or "").strip()


class OrderEngine:
    def __init__(
        self,
        *,
        store: OrderStore,
        resolver: VariantResolver,
        gateway: PaymentGateway,
        settings: Settings,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.gateway = gateway
        self.settings = settings

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    def _buyer(
        self, customer: Optional[Customer], req: FreeOrderRequest
    ) -> Buyer:
        if customer is not None:
            return Buyer(
                identification_no=customer.identification_no,
                full_name=customer.full_name,
                email=customer.email,
                contact_no=customer.contact_no,
            )
        buyer = Buyer(
            identification_no=_clean(req.identification_no),
            full_name=_clean(req.full_name),
            email=_clean(req.email),
            contact_no=_clean(req.contact_no),
        )
        filled = [bool(v) for v in vars(buyer).values()]
        if any(filled) and not all(filled):
            raise ValidationFailed(
                "identificationNo, fullName, email and contactNo must be "
                "all filled or all empty"
            )
        if buyer.email and not is_valid_email(buyer.email):
            raise ValidationFailed("invalid email")
        return buyer

    @staticmethod
    def _requested(req: FreeOrderRequest) -> Dict[str, int]:
        if not req.tickets:
            raise ValidationFailed("at least one ticket is required")
        requested: Dict[str, int] = {}
        for t in req.tickets:
            ticket_id = _clean(t.ticket_id)
            if not ticket_id:
                raise ValidationFailed("ticketId is required")
            if t.qty < 1:
                raise ValidationFailed(f"invalid quantity for {ticket_id}")
            # duplicates are summed, first appearance keeps its position
            requested[ticket_id] = requested.get(ticket_id, 0) + t.qty
        if sum(requested.values()) > MAX_TICKETS:
            raise ValidationFailed(
                f"at most {MAX_TICKETS} tickets per order"
            )
        return requested

    async def _price(
        self, customer: Optional[Customer], req: FreeOrderRequest
    ) -> _Priced:
        if req.ticket_group_id < 1:
            raise ValidationFailed("invalid ticketGroupId")
        try:
            day = parse_date_strict(req.date)
        except ValueError as e:
            raise ValidationFailed("invalid date format, expected yyyy-mm-dd",
                                   detail=str(e)) from e
        lang = _clean(req.lang_chosen) or "en"
        if lang not in LANGS:
            raise ValidationFailed(f"invalid langChosen: {lang}")
        buyer = self._buyer(customer, req)
        requested = self._requested(req)

        group, variants = await self.resolver.resolve(req.ticket_group_id, day)
        by_id = {v.ticket_id: v for v in variants}
        missing = [t for t in requested if t not in by_id]
        if missing:
            raise ValidationFailed(
                f"ticket not available: {', '.join(missing)}"
            )

        total = sum(
            (by_id[t].unit_price * qty for t, qty in requested.items()),
            Decimal("0"),
        ).quantize(CENT)
        return _Priced(
            group=group,
            visit_date=day.isoformat(),
            lang=lang,
            buyer=buyer,
            requested=requested,
            variants=by_id,
            total=total,
        )

    @staticmethod
    def _lines(priced: _Priced) -> List[OrderTicketInfo]:
        lines = []
        for ticket_id, qty in priced.requested.items():
            v = priced.variants[ticket_id]
            for _ in range(qty):
                lines.append(OrderTicketInfo(
                    item_id=ticket_id,
                    unit_price=v.unit_price,
                    item_desc1=v.item_desc1,
                    item_desc2=v.item_desc2,
                    item_desc3=v.item_desc3,
                    print_type=v.print_type,
                    quantity_bought=1,
                    variant="default",
                    encrypted_id="",
                    admit_date=priced.visit_date,
                    twbid="",
                ))
        return lines

    async def _persist(
        self, priced: _Priced, cust_id: Optional[str], fields: Dict,
        log_entry: Tuple[str, str, str],
    ) -> OrderTicketGroup:
        tz = self.settings.malaysia_tz
        for attempt in (1, 2):
            group = OrderTicketGroup(
                ticket_group_id=priced.group.id,
                cust_id=cust_id,
                order_no=new_reference("ORD", tz),
                bill_id=new_reference("BILL", tz),
                product_id=f"TG{priced.group.id}",
                product_desc=priced.group.group_name,
                total_amount=priced.total,
                buyer_name=priced.buyer.full_name,
                buyer_email=priced.buyer.email,
                lang_chosen=priced.lang,
                transaction_id="",
                is_email_sent=False,
                **fields,
            )
            try:
                # a dropped client must not interrupt the insert halfway
                return await asyncio.shield(
                    self.store.create(group, self._lines(priced), log_entry)
                )
            except DuplicateCreation:
                log.warning("order.order_no_collision",
                            order_no=group.order_no, attempt=attempt)
                if attempt == 2:
                    raise
        raise DuplicateCreation("order number already exists")

    async def create_paid(
        self, customer: Optional[Customer], req: PaidOrderRequest
    ) -> Tuple[OrderTicketGroup, Dict]:
        payment_type = _clean(req.payment_type)
        if payment_type not in PAYMENT_TYPES:
            raise ValidationFailed(f"invalid paymentType: {payment_type}")

        priced = await self._price(customer, req)

        msg_token = bank_code = bank_name = ""
        if payment_type == "fpx":
            mode = _clean(req.mode)
            bank_code = _clean(req.bank_code)
            if not mode or not bank_code:
                raise ValidationFailed("mode and bankCode are required for fpx")
            msg_token = self.gateway.msg_token(mode)
            bank_name = await self.gateway.bank_name(bank_code, mode)

        if priced.total <= 0:
            raise ValidationFailed("total amount must be greater than zero")

        order = await self._persist(
            priced,
            customer.cust_id if customer is not None else None,
            {
                "transaction_status": "initiate",
                "transaction_date": "",
                "msg_token": msg_token,
                "bank_code": bank_code,
                "bank_name": bank_name,
            },
            ("order", "Order Created",
             f"{payment_type} order of {format_money(priced.total)}"),
        )
        log.info("order.created", order_no=order.order_no,
                 total=format_money(order.total_amount),
                 payment_type=payment_type)
        redirect = {
            "url": f"/api/payment/redirect/{order.order_no}",
            "orderNo": order.order_no,
            "billId": order.bill_id,
            "totalAmount": format_money(order.total_amount),
        }
        return order, redirect

    async def create_free(
        self, customer: Optional[Customer], req: FreeOrderRequest
    ) -> OrderTicketGroup:
        priced = await self._price(customer, req)
        if priced.total != 0:
            raise ValidationFailed(
                "total amount must be zero for a free order"
            )

        order = await self._persist(
            priced,
            customer.cust_id if customer is not None else None,
            {
                "transaction_status": "success",
                "transaction_date": malaysia_stamp(self.settings.malaysia_tz),
                "msg_token": "",
                "bank_code": "",
                "bank_name": "",
            },
            ("order", "Order Created", "free order"),
        )
        log.info("order.created", order_no=order.order_no, total="0.00",
                 payment_type="free")
        return order

    # ------------------------------------------------------------------
    # gateway callback
    # ------------------------------------------------------------------
    async def apply_gateway_callback(
        self, payload: Mapping
    ) -> OrderTicketGroup:
        outcome = interpret_callback(payload)
        if not outcome.order_no:
            raise ValidationFailed("order_no is required")

        order = await self.store.get_by_order_no(outcome.order_no)
        if order is None:
            raise OrderNotFound(f"order {outcome.order_no} not found")

        tx_date = outcome.transaction_date
        if outcome.status == "success" and not tx_date:
            # keep the order visible to the delivery sweep
            tx_date = malaysia_stamp(self.settings.malaysia_tz)

        values = {
            "transaction_id": outcome.transaction_id,
            "transaction_date": tx_date,
            "bank_current_status": outcome.raw_status,
            "status_message": outcome.status_message,
        }
        if outcome.bank_code:
            values["bank_code"] = outcome.bank_code
        if outcome.bank_name:
            values["bank_name"] = outcome.bank_name

        previous, applied = await self.store.apply_transition(
            order.id,
            status=outcome.status,
            allowed_from=PREDECESSORS[outcome.status],
            values=values,
            log=(
                "payment",
                PAYMENT_LOG_TITLES[outcome.status],
                f"status_transaksi={outcome.raw_status or '-'} "
                f"{outcome.status_message}".strip(),
            ),
        )
        if applied:
            log.info("callback.applied", order_no=order.order_no,
                     previous=previous, status=outcome.status,
                     raw_status=outcome.raw_status)
        else:
            log.info("callback.ignored", order_no=order.order_no,
                     current=previous, status=outcome.status,
                     raw_status=outcome.raw_status)

        refreshed = await self.store.get(order.id)
        return refreshed if refreshed is not None else order

    async def redirect_form(self, order_no: str) -> RedirectForm:
        order = await self.store.get_by_order_no(order_no)
        if order is None:
            raise OrderNotFound(f"order {order_no} not found")
        if order.transaction_status != "initiate":
            raise ValidationFailed("order is not awaiting payment")
        token = await self.gateway.redirect_token()
        return self.gateway.build_redirect(order, token)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def view(self, order: OrderTicketGroup) -> OrderView:
        return OrderView(
            order=order,
            lines=await self.store.lines(order.id),
            logs=await self.store.logs(order.id),
        )

    async def inquire(self, order_no: str, email: str) -> OrderView:
        order_no, email = _clean(order_no), _clean(email)
        if not order_no or not email:
            raise ValidationFailed("orderNo and email are required")
        order = await self.store.get_by_order_no_and_email(order_no, email)
        if order is None:
            raise OrderNotFound("order not found")
        return await self.view(order)

    async def member_order(self, order_id: int, cust_id: str) -> OrderView:
        order = await self.store.get(order_id)
        if order is None or order.cust_id != cust_id:
            raise OrderNotFound("order not found")
        return await self.view(order)

    async def member_orders(self, cust_id: str) -> List[OrderTicketGroup]:
        return await self.store.list_for_customer(cust_id)
