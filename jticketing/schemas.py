from __future__ import annotations
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from .helpers import format_money, to_iso
from .model.order.orm import OrderTicketGroup, OrderTicketInfo, OrderTicketLog


# admissions per order
MAX_TICKETS = 100


class _Camel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ----------------------------
# Requests
# ----------------------------
class TicketRequest(_Camel):
    ticket_id: str
    qty: int = Field(le=MAX_TICKETS)


class FreeOrderRequest(_Camel):
    ticket_group_id: int
    date: str
    lang_chosen: str = "en"
    tickets: List[TicketRequest] = []
    # buyer block, all or none
    identification_no: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    contact_no: Optional[str] = None


class PaidOrderRequest(FreeOrderRequest):
    payment_type: str
    mode: Optional[str] = None
    bank_code: Optional[str] = None


class BankListRequest(_Camel):
    mode: str


# ----------------------------
# Responses
# ----------------------------
def line_dto(line: OrderTicketInfo) -> Dict:
    return {
        "orderTicketInfoId": line.id,
        "itemId": line.item_id,
        "unitPrice": format_money(line.unit_price),
        "itemDesc1": line.item_desc1,
        "itemDesc2": line.item_desc2,
        "itemDesc3": line.item_desc3,
        "printType": line.print_type,
        "quantityBought": line.quantity_bought,
        "variant": line.variant,
        "encryptedId": line.encrypted_id,
        "admitDate": line.admit_date,
        "twbid": line.twbid,
    }


def log_dto(entry: OrderTicketLog) -> Dict:
    return {
        "type": entry.type,
        "title": entry.title,
        "message": entry.message,
        "date": entry.date,
    }


def order_dto(
    order: OrderTicketGroup,
    lines: Optional[List[OrderTicketInfo]] = None,
    logs: Optional[List[OrderTicketLog]] = None,
) -> Dict:
    out = {
        "orderTicketGroupId": order.id,
        "orderNo": order.order_no,
        "billId": order.bill_id,
        "ticketGroupId": order.ticket_group_id,
        "custId": order.cust_id,
        "transactionStatus": order.transaction_status,
        "transactionId": order.transaction_id,
        "transactionDate": order.transaction_date,
        "bankCurrentStatus": order.bank_current_status,
        "statusMessage": order.status_message,
        "totalAmount": format_money(order.total_amount),
        "productId": order.product_id,
        "productDesc": order.product_desc,
        "buyerName": order.buyer_name,
        "buyerEmail": order.buyer_email,
        "bankCode": order.bank_code,
        "bankName": order.bank_name,
        "msgToken": order.msg_token,
        "langChosen": order.lang_chosen,
        "isEmailSent": bool(order.is_email_sent),
        "createdAt": to_iso(order.created_at),
        "updatedAt": to_iso(order.updated_at),
    }
    if lines is not None:
        out["tickets"] = [line_dto(li) for li in lines]
    if logs is not None:
        out["logs"] = [log_dto(e) for e in logs]
    return out
