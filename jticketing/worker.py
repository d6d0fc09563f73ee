"""
Delivery worker: turns paid orders into delivered tickets.

Each tick selects a bounded batch of orders that are ``success``, dated
and not yet emailed, then for each one (serially) provisions its tickets,
builds the localized email, hands it to the notification sink and flips
``is_email_sent`` with a compare-and-set. Any failure leaves the order
eligible for the next tick.

    python -m jticketing.worker [--once] [--interval S] [--batch N]
"""
from __future__ import annotations
import argparse
import asyncio
import signal
from dataclasses import dataclass, asdict, replace

import structlog

from .config import load_settings
from .errors import CatalogMiss, TicketingError
from .infra.logging import configure_logging
from .infra.timings import log_and_reset
from .model.catalog.store import CatalogStore
from .model.db import create_schema
from .model.order.orm import OrderTicketGroup
from .model.order.store import OrderStore
from .notify import NotificationSink, build_ticket_email
from .provisioner import TicketProvisioner


log = structlog.get_logger(__name__)


@dataclass
class TickResult:
    ran: bool = True
    found: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = 0


class DeliveryWorker:
    def __init__(
        self,
        *,
        store: OrderStore,
        catalog: CatalogStore,
        provisioner: TicketProvisioner,
        sink: NotificationSink,
        lease,
        interval: float = 60.0,
        batch: int = 50,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.provisioner = provisioner
        self.sink = sink
        self.lease = lease
        self.interval = interval
        self.batch = batch
        self._stop = asyncio.Event()

    def stop(self) -> None:
        self._stop.set()

    async def deliver(self, order: OrderTicketGroup) -> bool:
        """True when the email went out (or another worker already marked it)."""
        group = await self.catalog.get_group(order.ticket_group_id)
        if group is None:
            raise CatalogMiss(f"ticket group {order.ticket_group_id} not found")

        if not order.buyer_email:
            log.warning("delivery.no_recipient", order_no=order.order_no)
            return False
        snap = await self.provisioner.provision(order, group)
        if not snap.complete:
            log.warning("delivery.incomplete", order_no=order.order_no,
                        missing=snap.missing)
            return False

        message = build_ticket_email(order, group, snap.lines)
        await self.sink.send(message)

        if not await self.store.mark_email_sent(
            order.id, f"sent to {order.buyer_email}"
        ):
            log.info("delivery.already_marked", order_no=order.order_no)
        return True

    async def run_tick(self) -> TickResult:
        if not await self.lease.acquire():
            log.info("sweep.skipped", reason="previous tick still running")
            return TickResult(ran=False)

        result = TickResult()
        try:
            orders = await self.store.find_deliverable(self.batch)
            result.found = len(orders)
            for order in orders:
                # finish the current order, never start a new one on shutdown
                if self._stop.is_set():
                    break
                try:
                    if await self.deliver(order):
                        result.delivered += 1
                        continue
                    result.skipped += 1
                except TicketingError as e:
                    result.failed += 1
                    log.warning("sweep.order_failed", order_no=order.order_no,
                                code=e.code, error=e.message, detail=e.detail)
                except Exception:
                    result.failed += 1
                    log.exception("sweep.order_crashed",
                                  order_no=order.order_no)
                await self.store.defer(order.id)
        finally:
            await self.lease.release()

        log.info("sweep.tick", **asdict(result))
        return result

    async def run_forever(self) -> None:
        log.info("sweep.started", interval=self.interval, batch=self.batch)
        while not self._stop.is_set():
            try:
                await self.run_tick()
            except Exception:
                # database or lease outage: try again next tick
                log.exception("sweep.tick_crashed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass
        log.info("sweep.stopped")


async def _main(args: argparse.Namespace) -> None:
    # wiring imports this module
    from .wiring import build_services

    settings = load_settings()
    configure_logging(settings.log_level, settings.log_format)
    overrides = {}
    if args.interval is not None:
        overrides["sweep_interval"] = args.interval
    if args.batch is not None:
        overrides["sweep_batch"] = args.batch
    if overrides:
        settings = replace(settings, **overrides)

    services = build_services(settings)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, services.worker.stop)
    try:
        await create_schema(services.db_engine)
        if args.once:
            await services.worker.run_tick()
        else:
            await services.worker.run_forever()
    finally:
        await services.close()
        log_and_reset()


def main() -> None:
    parser = argparse.ArgumentParser(
        prog="jticketing.worker",
        description="Provision tickets and email paid orders.",
    )
    parser.add_argument("--once", action="store_true",
                        help="run a single sweep and exit")
    parser.add_argument("--interval", type=float, default=None,
                        help="seconds between sweeps")
    parser.add_argument("--batch", type=int, default=None,
                        help="max orders per sweep")
    asyncio.run(_main(parser.parse_args()))


if __name__ == "__main__":
    main()
