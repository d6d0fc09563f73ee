from __future__ import annotations
import secrets
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List

import structlog

from .config import Settings
from .errors import ValidationFailed
from .helpers import parse_money
from .model.catalog.orm import TicketGroup
from .model.order.orm import OrderTicketGroup, OrderTicketInfo
from .model.order.store import OrderStore
from .zooapi import ZooClient


log = structlog.get_logger(__name__)


@dataclass
class Provisioned:
    """Snapshot of an order's lines after a provisioning pass."""
    lines: List[OrderTicketInfo]
    issued: int = 0
    called_upstream: bool = False
    missing: Dict[str, int] = field(default_factory=dict)

    @property
    def complete(self) -> bool:
        return bool(self.lines) and all(li.encrypted_id for li in self.lines)


def _summary(lines: List[OrderTicketInfo]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for li in lines:
        counts[li.item_id] = counts.get(li.item_id, 0) + li.quantity_bought
    return counts


class TicketProvisioner:
    def __init__(
        self, *, store: OrderStore, zoo: ZooClient, settings: Settings
    ) -> None:
        self.store = store
        self.zoo = zoo
        self.price_override = settings.provision_price_override

    async def provision(
        self, order: OrderTicketGroup, group: TicketGroup
    ) -> Provisioned:
        if order.transaction_status != "success":
            raise ValidationFailed(f"order {order.order_no} is not paid")

        lines = await self.store.lines(order.id)
        pending = [li for li in lines if not li.encrypted_id]
        if not pending:
            return Provisioned(lines=lines)

        if group.is_ticket_internal:
            issued = await self._internal(order, lines, pending)
            result = Provisioned(lines=[], issued=issued)
        else:
            result = await self._external(order, pending)

        if result.issued:
            await self.store.add_log(
                order.id, "ticket", "QR Code Assigned",
                f"{result.issued} ticket(s) assigned",
            )
        result.lines = await self.store.lines(order.id)
        return result

    async def _internal(
        self,
        order: OrderTicketGroup,
        lines: List[OrderTicketInfo],
        pending: List[OrderTicketInfo],
    ) -> int:
        # one token per order; reuse it if an earlier pass got halfway
        token = next(
            (li.encrypted_id for li in lines if li.encrypted_id), None
        ) or secrets.token_hex(32)
        issued = 0
        for li in pending:
            if await self.store.set_line_provisioned(
                li.id, encrypted_id=token, admit_date=li.admit_date
            ):
                issued += 1
        log.info("provision.internal", order_no=order.order_no, issued=issued)
        return issued

    async def _external(
        self, order: OrderTicketGroup, pending: List[OrderTicketInfo]
    ) -> Provisioned:
        wanted = _summary(pending)
        result = await self.zoo.purchase(
            tran_date=order.transaction_date[:10],
            reference_no=order.order_no,
            items=wanted,
        )

        queues: Dict[str, Deque[OrderTicketInfo]] = {}
        for li in pending:
            queues.setdefault(li.item_id, deque()).append(li)

        issued = 0
        for ticket in result.tickets:
            queue = queues.get(ticket.item_id)
            if not queue:
                log.warning("provision.unexpected_ticket",
                            order_no=order.order_no, item_id=ticket.item_id)
                continue
            if not ticket.encrypted_id:
                log.warning("provision.empty_ticket",
                            order_no=order.order_no, item_id=ticket.item_id)
                continue
            line = queue.popleft()

            price = parse_money(ticket.unit_price)
            new_price = None
            if price is not None and price != line.unit_price:
                if self.price_override:
                    new_price = price
                log.warning("provision.price_mismatch",
                            order_no=order.order_no, item_id=line.item_id,
                            stored=str(line.unit_price), issued=str(price),
                            overridden=self.price_override)

            # one row at a time: a crash keeps every finished line
            if await self.store.set_line_provisioned(
                line.id,
                encrypted_id=ticket.encrypted_id,
                admit_date=(ticket.admit_date or line.admit_date)[:10],
                twbid=ticket.twbid,
                unit_price=new_price,
            ):
                issued += 1

        missing = {k: len(q) for k, q in queues.items() if q}
        if missing:
            log.warning("provision.short", order_no=order.order_no,
                        missing=missing)
        log.info("provision.external", order_no=order.order_no,
                 requested=sum(wanted.values()), issued=issued)
        return Provisioned(
            lines=[], issued=issued, called_upstream=True, missing=missing,
        )
