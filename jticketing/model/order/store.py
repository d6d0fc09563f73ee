from __future__ import annotations
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import (
    Any, AsyncIterator, Callable, AsyncContextManager, Dict, Iterable,
    List, Optional, Tuple,
)

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .orm import OrderTicketGroup, OrderTicketInfo, OrderTicketLog
from ...errors import DuplicateCreation, PartialPersist
from ...helpers import malaysia_stamp, utcnow, LOG_DATE_FORMAT
from ...infra.timings import timeit


Gated = Callable[[], AsyncContextManager[None]]


class OrderStore:
    def __init__(
        self, *, sessions: async_sessionmaker, gated: Gated, tz: str
    ) -> None:
        self.sessions = sessions
        self.gated = gated
        self.tz = tz

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    yield db

    def _log_row(
        self, order_id: int, type_: str, title: str, message: str = ""
    ) -> OrderTicketLog:
        return OrderTicketLog(
            order_ticket_group_id=order_id,
            type=type_,
            title=title,
            message=message,
            date=malaysia_stamp(self.tz, LOG_DATE_FORMAT),
        )

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    async def create(
        self,
        group: OrderTicketGroup,
        lines: Iterable[OrderTicketInfo],
        log: Tuple[str, str, str],
    ) -> OrderTicketGroup:
        """
        Insert the group, its lines and the creation log row in one
        transaction. Nothing is left behind when any step fails.
        """
        async with timeit("db.order.create"):
            async with self._tx() as db:
                db.add(group)
                try:
                    await db.flush()
                except IntegrityError as e:
                    raise DuplicateCreation(
                        "order number already exists", detail=str(e.orig)
                    ) from e

                batch = list(lines)
                for line in batch:
                    line.order_ticket_group_id = group.id
                db.add_all(batch)
                try:
                    await db.flush()
                except SQLAlchemyError as e:
                    raise PartialPersist(
                        "failed to persist order lines", detail=str(e)
                    ) from e

                db.add(self._log_row(group.id, *log))
        return group

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get(self, order_id: int) -> Optional[OrderTicketGroup]:
        async with self.gated():
            async with self.sessions() as db:
                return await db.get(OrderTicketGroup, order_id)

    async def get_by_order_no(
        self, order_no: str
    ) -> Optional[OrderTicketGroup]:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(OrderTicketGroup)
                    .where(OrderTicketGroup.order_no == order_no)
                )
                return res.scalars().first()

    async def get_by_order_no_and_email(
        self, order_no: str, email: str
    ) -> Optional[OrderTicketGroup]:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(OrderTicketGroup).where(
                        OrderTicketGroup.order_no == order_no,
                        func.lower(OrderTicketGroup.buyer_email)
                        == email.strip().lower(),
                    )
                )
                return res.scalars().first()

    async def list_for_customer(
        self, cust_id: str, limit: int = 100
    ) -> List[OrderTicketGroup]:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(OrderTicketGroup)
                    .where(OrderTicketGroup.cust_id == cust_id)
                    .order_by(OrderTicketGroup.id.desc())
                    .limit(limit)
                )
                return list(res.scalars().all())

    async def lines(self, order_id: int) -> List[OrderTicketInfo]:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(OrderTicketInfo)
                    .where(OrderTicketInfo.order_ticket_group_id == order_id)
                    .order_by(OrderTicketInfo.id)
                )
                return list(res.scalars().all())

    async def logs(self, order_id: int) -> List[OrderTicketLog]:
        async with self.gated():
            async with self.sessions() as db:
                res = await db.execute(
                    select(OrderTicketLog)
                    .where(OrderTicketLog.order_ticket_group_id == order_id)
                    .order_by(OrderTicketLog.id)
                )
                return list(res.scalars().all())

    async def find_deliverable(self, limit: int) -> List[OrderTicketGroup]:
        async with timeit("db.order.deliverable"):
            async with self.gated():
                async with self.sessions() as db:
                    res = await db.execute(
                        select(OrderTicketGroup)
                        .where(
                            OrderTicketGroup.transaction_status == "success",
                            OrderTicketGroup.is_email_sent.is_(False),
                            OrderTicketGroup.transaction_date != "",
                            OrderTicketGroup.buyer_email != "",
                        )
                        # orders that keep failing rotate to the back
                        .order_by(OrderTicketGroup.updated_at,
                                  OrderTicketGroup.id)
                        .limit(limit)
                    )
                    return list(res.scalars().all())

    # ------------------------------------------------------------------
    # guarded writes
    # ------------------------------------------------------------------
    async def apply_transition(
        self,
        order_id: int,
        *,
        status: str,
        allowed_from: Iterable[str],
        values: Dict[str, Any],
        log: Tuple[str, str, str],
    ) -> Tuple[Optional[str], bool]:
        """
        Move ``transaction_status`` to ``status`` only if the row is still
        in one of ``allowed_from``. Returns ``(previous_status, applied)``;
        ``previous_status`` is None when the order does not exist.
        """
        async with timeit("db.order.transition"):
            async with self._tx() as db:
                current = (await db.execute(
                    select(OrderTicketGroup.transaction_status)
                    .where(OrderTicketGroup.id == order_id)
                )).scalar_one_or_none()
                if current is None:
                    return None, False

                res = await db.execute(
                    update(OrderTicketGroup)
                    .where(
                        OrderTicketGroup.id == order_id,
                        OrderTicketGroup.transaction_status.in_(
                            list(allowed_from)
                        ),
                    )
                    .values(
                        transaction_status=status,
                        updated_at=utcnow(),
                        **values,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    return current, False
                if current != status:
                    db.add(self._log_row(order_id, *log))
                return current, True

    async def set_line_provisioned(
        self,
        line_id: int,
        *,
        encrypted_id: str,
        admit_date: str,
        twbid: str = "",
        unit_price: Optional[Decimal] = None,
    ) -> bool:
        values: Dict[str, Any] = {
            "encrypted_id": encrypted_id,
            "admit_date": admit_date,
            "twbid": twbid,
            "updated_at": utcnow(),
        }
        if unit_price is not None:
            values["unit_price"] = unit_price
        async with self._tx() as db:
            # never overwrite a provisioned line
            res = await db.execute(
                update(OrderTicketInfo)
                .where(
                    OrderTicketInfo.id == line_id,
                    OrderTicketInfo.encrypted_id == "",
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return res.rowcount == 1

    async def mark_email_sent(self, order_id: int, log_message: str) -> bool:
        """Compare-and-set ``is_email_sent`` false -> true."""
        async with self._tx() as db:
            res = await db.execute(
                update(OrderTicketGroup)
                .where(
                    OrderTicketGroup.id == order_id,
                    OrderTicketGroup.is_email_sent.is_(False),
                )
                .values(is_email_sent=True, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                return False
            db.add(self._log_row(order_id, "email", "Email Sent", log_message))
            return True

    async def defer(self, order_id: int) -> None:
        """Push an order behind the rest of the sweep queue."""
        async with self._tx() as db:
            await db.execute(
                update(OrderTicketGroup)
                .where(OrderTicketGroup.id == order_id)
                .values(updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )

    async def add_log(
        self, order_id: int, type_: str, title: str, message: str = ""
    ) -> None:
        async with self._tx() as db:
            db.add(self._log_row(order_id, type_, title, message))
