import re
from decimal import Decimal

import pytest

from jticketing import engine as engine_module
from jticketing.errors import (
    CatalogMiss, DisabledBank, DuplicateCreation, Inactive, OrderNotFound,
    PartialPersist, UnknownBank, ValidationFailed,
)
from jticketing.model.order.orm import OrderTicketGroup, OrderTicketInfo
from jticketing.schemas import FreeOrderRequest, PaidOrderRequest


pytestmark = pytest.mark.anyio

ORDER_NO = re.compile(r"^ORD-\d{14}-\d{4}$")
BILL_ID = re.compile(r"^BILL-\d{14}-\d{4}$")


def paid(body) -> PaidOrderRequest:
    return PaidOrderRequest.model_validate(body)


def free(body) -> FreeOrderRequest:
    return FreeOrderRequest.model_validate(body)


async def _customer(services, cust_id="C001"):
    return await services.catalog.get_customer(cust_id)


# ==============================================================
# Creation
# ==============================================================
async def test_create_paid_fpx_order(engine, services, upstream, paid_body):
    order, redirect = await engine.create_paid(None, paid(paid_body))

    assert ORDER_NO.match(order.order_no)
    assert BILL_ID.match(order.bill_id)
    assert order.transaction_status == "initiate"
    assert order.transaction_date == ""
    assert order.total_amount == Decimal("10.00")
    assert order.msg_token == "01"
    assert order.bank_code == "MB2U"
    assert order.bank_name == "Maybank2u"
    assert order.product_id == "TG1"
    assert order.buyer_email == "aminah@example.com"
    assert order.is_email_sent is False
    assert order.cust_id is None

    lines = await services.orders.lines(order.id)
    assert len(lines) == 2
    for li in lines:
        assert li.item_id == "TIC-O-0020"
        assert li.unit_price == Decimal("5.00")
        assert li.quantity_bought == 1
        assert li.encrypted_id == ""
        assert li.admit_date == "2025-05-21"
        assert li.variant == "default"
    assert sum(li.unit_price for li in lines) == order.total_amount

    logs = await services.orders.logs(order.id)
    assert [e.title for e in logs] == ["Order Created"]
    assert re.match(r"^\d{14}$", logs[0].date)

    assert redirect == {
        "url": f"/api/payment/redirect/{order.order_no}",
        "orderNo": order.order_no,
        "billId": order.bill_id,
        "totalAmount": "10.00",
    }
    assert upstream.bank_modes == ["01"]


async def test_credit_card_order_skips_bank_lookup(engine, upstream, paid_body):
    paid_body.update(paymentType="credit/debit", mode=None, bankCode=None)
    order, _ = await engine.create_paid(None, paid(paid_body))
    assert order.msg_token == ""
    assert order.bank_code == ""
    assert upstream.bank_modes == []


async def test_duplicate_tickets_are_summed_in_order(engine, services, paid_body):
    paid_body["tickets"] = [
        {"ticketId": "TIC-O-0021", "qty": 1},
        {"ticketId": "TIC-O-0020", "qty": 1},
        {"ticketId": "TIC-O-0021", "qty": 2},
    ]
    order, _ = await engine.create_paid(None, paid(paid_body))

    lines = await services.orders.lines(order.id)
    assert [li.item_id for li in lines] == [
        "TIC-O-0021", "TIC-O-0021", "TIC-O-0021", "TIC-O-0020",
    ]
    assert order.total_amount == Decimal("14.00")


@pytest.mark.parametrize("tickets,message", [
    ([{"ticketId": "TIC-NOPE", "qty": 1}], "ticket not available: TIC-NOPE"),
    # listed by the issuer but not sold through this group
    ([{"ticketId": "TIC-O-0099", "qty": 1}], "ticket not available: TIC-O-0099"),
    ([{"ticketId": "TIC-O-0020", "qty": 0}], "invalid quantity"),
    ([], "at least one ticket"),
    ([{"ticketId": "TIC-O-0020", "qty": 60},
      {"ticketId": "TIC-O-0021", "qty": 41}], "at most 100 tickets"),
])
async def test_invalid_tickets_persist_nothing(
    engine, count_orders, paid_body, tickets, message
):
    paid_body["tickets"] = tickets
    with pytest.raises(ValidationFailed, match=message):
        await engine.create_paid(None, paid(paid_body))
    assert await count_orders() == 0


async def test_paid_path_rejects_zero_total(engine, count_orders, paid_body):
    paid_body["tickets"] = [{"ticketId": "TIC-O-0000", "qty": 3}]
    with pytest.raises(ValidationFailed, match="greater than zero"):
        await engine.create_paid(None, paid(paid_body))
    assert await count_orders() == 0


async def test_free_order_is_born_successful(engine, services, upstream, free_body):
    order = await engine.create_free(None, free(free_body))

    assert order.transaction_status == "success"
    assert re.match(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$",
                    order.transaction_date)
    assert order.total_amount == Decimal("0.00")
    assert order.is_email_sent is False
    # never touches the payment gateway
    assert upstream.count("/JP_gateway/getBankList") == 0
    assert upstream.count("/JP_gateway/redflow") == 0

    deliverable = await services.orders.find_deliverable(10)
    assert [o.id for o in deliverable] == [order.id]


async def test_free_path_rejects_non_zero_total(engine, count_orders, free_body):
    free_body["tickets"] = [{"ticketId": "TIC-O-0020", "qty": 1}]
    with pytest.raises(ValidationFailed, match="must be zero"):
        await engine.create_free(None, free(free_body))
    assert await count_orders() == 0


async def test_disabled_and_unknown_banks(engine, count_orders, paid_body):
    paid_body["bankCode"] = "XYZ"
    with pytest.raises(DisabledBank):
        await engine.create_paid(None, paid(paid_body))
    paid_body["bankCode"] = "NOPE"
    with pytest.raises(UnknownBank):
        await engine.create_paid(None, paid(paid_body))
    assert await count_orders() == 0


@pytest.mark.parametrize("overrides", [
    {"mode": None},
    {"bankCode": ""},
    {"mode": "  "},
])
async def test_fpx_requires_mode_and_bank(engine, paid_body, overrides):
    paid_body.update(overrides)
    with pytest.raises(ValidationFailed, match="mode and bankCode"):
        await engine.create_paid(None, paid(paid_body))


async def test_unknown_payment_type(engine, paid_body):
    paid_body["paymentType"] = "cash"
    with pytest.raises(ValidationFailed, match="paymentType"):
        await engine.create_paid(None, paid(paid_body))


async def test_buyer_block_is_all_or_nothing(engine, paid_body):
    paid_body["contactNo"] = ""
    with pytest.raises(ValidationFailed, match="all filled or all empty"):
        await engine.create_paid(None, paid(paid_body))


async def test_buyer_email_must_be_valid(engine, paid_body):
    paid_body["email"] = "not-an-email"
    with pytest.raises(ValidationFailed, match="invalid email"):
        await engine.create_paid(None, paid(paid_body))


@pytest.mark.parametrize("day", ["21-05-2025", "2025-5-21", "2025-02-30",
                                 "2025-05-21T00:00:00", ""])
async def test_visit_date_is_strict(engine, paid_body, day):
    paid_body["date"] = day
    with pytest.raises(ValidationFailed, match="yyyy-mm-dd"):
        await engine.create_paid(None, paid(paid_body))


async def test_language_must_be_known(engine, paid_body):
    paid_body["langChosen"] = "fr"
    with pytest.raises(ValidationFailed, match="langChosen"):
        await engine.create_paid(None, paid(paid_body))


async def test_group_must_exist_and_be_active(engine, paid_body):
    paid_body["ticketGroupId"] = 99
    with pytest.raises(CatalogMiss):
        await engine.create_paid(None, paid(paid_body))
    paid_body["ticketGroupId"] = 3
    with pytest.raises(Inactive):
        await engine.create_paid(None, paid(paid_body))


async def test_member_details_replace_request_buyer(engine, services, paid_body):
    customer = await _customer(services)
    paid_body.update(identificationNo=None, fullName="Someone Else",
                     email=None, contactNo=None)
    order, _ = await engine.create_paid(customer, paid(paid_body))

    assert order.cust_id == "C001"
    assert order.buyer_name == "Siti Nurhaliza"
    assert order.buyer_email == "siti@example.com"


async def test_order_number_collision_is_retried_once(
    engine, count_orders, paid_body, monkeypatch
):
    monkeypatch.setattr(
        engine_module, "new_reference",
        lambda prefix, tz: f"{prefix}-20250521101500-0001",
    )
    await engine.create_paid(None, paid(paid_body))
    with pytest.raises(DuplicateCreation):
        await engine.create_paid(None, paid(paid_body))
    assert await count_orders() == 1


async def test_failed_line_insert_rolls_back_the_group(services, count_orders):
    group = OrderTicketGroup(
        ticket_group_id=1, order_no="ORD-20250521101500-0009",
        total_amount=Decimal("5.00"), transaction_status="initiate",
    )
    broken = OrderTicketInfo(item_id=None, unit_price=Decimal("5.00"))
    with pytest.raises(PartialPersist):
        await services.orders.create(group, [broken], ("order", "Order Created", ""))
    assert await count_orders() == 0


# ==============================================================
# Gateway callbacks
# ==============================================================
def _callback(order_no, code, **extra):
    payload = {
        "order_no": order_no,
        "status_transaksi": code,
        "id_transaksi": "TX-1",
        "tarikh_transaksi": "2025-05-21 10:15:00",
        "kod_bank": "MB2U",
        "nama_bank": "Maybank2u",
        "status_message": "Approved" if code == "00" else "Pending",
    }
    payload.update(extra)
    return payload


async def test_success_callback_makes_order_deliverable(engine, services, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))
    updated = await engine.apply_gateway_callback(_callback(order.order_no, "00"))

    assert updated.transaction_status == "success"
    assert updated.transaction_id == "TX-1"
    assert updated.transaction_date == "2025-05-21 10:15:00"
    assert updated.bank_current_status == "00"
    assert updated.status_message == "Approved"
    assert updated.is_email_sent is False

    deliverable = await services.orders.find_deliverable(10)
    assert [o.order_no for o in deliverable] == [order.order_no]


async def test_status_never_regresses(engine, services, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))

    after = await engine.apply_gateway_callback(_callback(order.order_no, "09"))
    assert after.transaction_status == "pending"
    after = await engine.apply_gateway_callback(_callback(order.order_no, "00"))
    assert after.transaction_status == "success"
    after = await engine.apply_gateway_callback(_callback(order.order_no, "99"))
    assert after.transaction_status == "success"
    after = await engine.apply_gateway_callback(
        _callback(order.order_no, "51", status_message="Declined")
    )
    assert after.transaction_status == "success"
    assert after.status_message == "Approved"

    titles = [e.title for e in await services.orders.logs(order.id)]
    assert titles == ["Order Created", "Payment Pending", "Payment Success"]


async def test_failed_is_terminal(engine, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))
    after = await engine.apply_gateway_callback(_callback(order.order_no, "51"))
    assert after.transaction_status == "failed"
    after = await engine.apply_gateway_callback(_callback(order.order_no, "00"))
    assert after.transaction_status == "failed"


async def test_repeated_success_is_a_no_op(engine, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))
    first = await engine.apply_gateway_callback(_callback(order.order_no, "00"))
    second = await engine.apply_gateway_callback(
        _callback(order.order_no, "00", id_transaksi="TX-2",
                  tarikh_transaksi="2025-05-22 09:00:00")
    )
    assert second.transaction_id == first.transaction_id == "TX-1"
    assert second.transaction_date == first.transaction_date
    assert second.updated_at == first.updated_at


async def test_success_without_date_gets_stamped(engine, services, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))
    updated = await engine.apply_gateway_callback(
        _callback(order.order_no, "00", tarikh_transaksi="")
    )
    assert re.match(r"^\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}$",
                    updated.transaction_date)
    assert len(await services.orders.find_deliverable(10)) == 1


async def test_callback_keeps_bank_fields_when_absent(engine, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))
    updated = await engine.apply_gateway_callback(
        _callback(order.order_no, "00", kod_bank="", nama_bank="")
    )
    assert updated.bank_code == "MB2U"
    assert updated.bank_name == "Maybank2u"


async def test_callback_for_unknown_order(engine):
    with pytest.raises(OrderNotFound):
        await engine.apply_gateway_callback(_callback("ORD-00000000000000-0000", "00"))
    with pytest.raises(ValidationFailed):
        await engine.apply_gateway_callback({"status_transaksi": "00"})


# ==============================================================
# Reads
# ==============================================================
async def test_inquiry_needs_matching_email(engine, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))

    view = await engine.inquire(order.order_no, "AMINAH@example.com ")
    assert view.order.id == order.id
    assert len(view.lines) == 2
    assert [e.title for e in view.logs] == ["Order Created"]

    with pytest.raises(OrderNotFound):
        await engine.inquire(order.order_no, "someone@example.com")
    with pytest.raises(ValidationFailed):
        await engine.inquire(order.order_no, "")


async def test_member_reads_are_scoped(engine, services, paid_body):
    customer = await _customer(services)
    mine, _ = await engine.create_paid(customer, paid(paid_body))
    await engine.create_paid(None, paid(paid_body))
    newer, _ = await engine.create_paid(customer, paid(paid_body))

    orders = await engine.member_orders("C001")
    assert [o.id for o in orders] == [newer.id, mine.id]

    view = await engine.member_order(mine.id, "C001")
    assert view.order.order_no == mine.order_no
    with pytest.raises(OrderNotFound):
        await engine.member_order(mine.id, "C002")


async def test_redirect_form_only_for_initiated_orders(engine, paid_body):
    order, _ = await engine.create_paid(None, paid(paid_body))
    form = await engine.redirect_form(order.order_no)
    assert form.fields["jp_order_no"] == order.order_no
    assert form.fields["jp_token"] == "RK-1"

    await engine.apply_gateway_callback(_callback(order.order_no, "00"))
    with pytest.raises(ValidationFailed):
        await engine.redirect_form(order.order_no)
