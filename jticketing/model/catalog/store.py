from __future__ import annotations
from typing import Callable, AsyncContextManager, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from .orm import TicketGroup, TicketVariant, Customer
from ...infra.timings import timeit


Gated = Callable[[], AsyncContextManager[None]]


class CatalogStore:
    """Read-only view over ticket groups, their local variants and members."""

    def __init__(self, *, sessions: async_sessionmaker, gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    async def get_group(self, ticket_group_id: int) -> Optional[TicketGroup]:
        async with timeit("db.catalog.group"):
            async with self.gated():
                async with self.sessions() as db:
                    return await db.get(TicketGroup, ticket_group_id)

    async def variants_for_group(
        self, ticket_group_id: int
    ) -> List[TicketVariant]:
        async with timeit("db.catalog.variants"):
            async with self.gated():
                async with self.sessions() as db:
                    rows = await db.execute(
                        select(TicketVariant)
                        .where(TicketVariant.ticket_group_id == ticket_group_id)
                        .order_by(TicketVariant.id)
                    )
                    return list(rows.scalars().all())

    async def get_customer(self, cust_id: str) -> Optional[Customer]:
        async with self.gated():
            async with self.sessions() as db:
                return await db.get(Customer, cust_id)
