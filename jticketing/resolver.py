from __future__ import annotations
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Dict, List, Tuple

import structlog

from .errors import CatalogMiss, Inactive
from .helpers import parse_money, format_money
from .model.catalog.orm import TicketGroup
from .model.catalog.store import CatalogStore
from .zooapi import ZooClient


log = structlog.get_logger(__name__)


@dataclass
class Variant:
    ticket_id: str
    unit_price: Decimal
    item_desc1: str = ""
    item_desc2: str = ""
    item_desc3: str = ""
    print_type: str = ""

    def to_dict(self) -> Dict:
        return {
            "ticketId": self.ticket_id,
            "unitPrice": format_money(self.unit_price),
            "itemDesc1": self.item_desc1,
            "itemDesc2": self.item_desc2,
            "itemDesc3": self.item_desc3,
            "printType": self.print_type,
        }


def _in_window(group: TicketGroup, day: date) -> bool:
    stamp = day.strftime("%Y%m%d")
    if group.active_start_date and stamp < group.active_start_date:
        return False
    if group.active_end_date and stamp > group.active_end_date:
        return False
    return True


class VariantResolver:
    """
    The only authority for creation-time prices. Internal groups read the
    local ``ticket_variant`` table; external groups ask the issuance API
    for the visit date and keep the items the group is configured to sell.
    """

    def __init__(self, catalog: CatalogStore, zoo: ZooClient) -> None:
        self.catalog = catalog
        self.zoo = zoo

    async def sellable_group(
        self, ticket_group_id: int, day: date
    ) -> TicketGroup:
        group = await self.catalog.get_group(ticket_group_id)
        if group is None:
            raise CatalogMiss(f"ticket group {ticket_group_id} not found")
        if not group.is_active or not _in_window(group, day):
            raise Inactive(f"ticket group {ticket_group_id} is not active")
        return group

    async def variants_for(
        self, group: TicketGroup, day: date
    ) -> List[Variant]:
        if group.is_ticket_internal:
            rows = await self.catalog.variants_for_group(group.id)
            found = [
                Variant(
                    ticket_id=r.ticket_id,
                    unit_price=parse_money(r.unit_price),
                    item_desc1=r.name_bm,
                    item_desc2=r.name_en,
                    item_desc3=r.name_cn,
                    print_type=r.print_type,
                )
                for r in rows
            ]
        else:
            items = await self.zoo.online_items(
                group.group_name, day.isoformat()
            )
            allowed = set(group.allowed_ticket_ids())
            found = []
            for it in items:
                ticket_id = str(it.get("ItemId") or "")
                if allowed and ticket_id not in allowed:
                    continue
                found.append(Variant(
                    ticket_id=ticket_id,
                    unit_price=parse_money(it.get("UnitPrice")),
                    item_desc1=str(it.get("ItemDescription") or ""),
                    item_desc2=str(it.get("ItemDesc1") or ""),
                    item_desc3=str(it.get("ItemDesc2") or ""),
                    print_type=str(it.get("PrintType") or ""),
                ))

        out: List[Variant] = []
        seen = set()
        for v in found:
            if not v.ticket_id or v.ticket_id in seen:
                continue
            if v.unit_price is None or v.unit_price < 0:
                log.warning("resolver.bad_price", ticket_group_id=group.id,
                            ticket_id=v.ticket_id)
                continue
            seen.add(v.ticket_id)
            out.append(v)
        return out

    async def resolve(
        self, ticket_group_id: int, day: date
    ) -> Tuple[TicketGroup, List[Variant]]:
        group = await self.sellable_group(ticket_group_id, day)
        return group, await self.variants_for(group, day)
