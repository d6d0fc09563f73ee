from __future__ import annotations
from dataclasses import dataclass
from typing import Optional

import httpx
import redis.asyncio as redis
import structlog
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker

from .config import Settings
from .engine import OrderEngine
from .gateway import PaymentGateway
from .infra.sql import make_async_engine
from .model.catalog.store import CatalogStore
from .model.order.store import OrderStore
from .model.sweeplock import new_lease
from .notify import NotificationSink, new_sink
from .provisioner import TicketProvisioner
from .resolver import VariantResolver
from .worker import DeliveryWorker
from .zooapi import ZooClient


log = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    db_engine: AsyncEngine
    sessions: async_sessionmaker
    http: httpx.AsyncClient
    redis: Optional[redis.Redis]
    orders: OrderStore
    catalog: CatalogStore
    gateway: PaymentGateway
    resolver: VariantResolver
    engine: OrderEngine
    provisioner: TicketProvisioner
    sink: NotificationSink
    worker: DeliveryWorker

    async def close(self) -> None:
        await self.http.aclose()
        await self.worker.lease.close()
        await self.db_engine.dispose()


def build_services(
    settings: Settings,
    *,
    http: Optional[httpx.AsyncClient] = None,
    sink: Optional[NotificationSink] = None,
) -> Services:
    db_engine, SessionAsync, gated = make_async_engine(settings)

    if http is None:
        http = httpx.AsyncClient(
            timeout=30.0,
            limits=httpx.Limits(max_connections=64,
                                max_keepalive_connections=16),
        )

    r = None
    if settings.sweep_lock_backend == "redis":
        r = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )

    orders = OrderStore(sessions=SessionAsync, gated=gated,
                        tz=settings.malaysia_tz)
    catalog = CatalogStore(sessions=SessionAsync, gated=gated)
    zoo = ZooClient(http, base_url=settings.zoo_base_url,
                    user=settings.zoo_user, password=settings.zoo_pass)
    gateway = PaymentGateway(
        http,
        base_url=settings.payment_gateway_url,
        api_key=settings.payment_api_key,
        ag_token=settings.payment_ag_token,
        public_base_url=settings.public_base_url,
    )
    resolver = VariantResolver(catalog, zoo)
    engine = OrderEngine(store=orders, resolver=resolver, gateway=gateway,
                         settings=settings)
    provisioner = TicketProvisioner(store=orders, zoo=zoo, settings=settings)
    sink = sink if sink is not None else new_sink(settings)
    lease = new_lease(
        settings.sweep_lock_backend, r=r,
        # a crashed holder frees the lease after a few intervals
        ttl_seconds=max(60, int(settings.sweep_interval * 5)),
    )
    worker = DeliveryWorker(
        store=orders,
        catalog=catalog,
        provisioner=provisioner,
        sink=sink,
        lease=lease,
        interval=settings.sweep_interval,
        batch=settings.sweep_batch,
    )
    log.info("services.ready", database=db_engine.url.drivername,
             sweep_lock=settings.sweep_lock_backend,
             mail=settings.mail_backend)
    return Services(
        settings=settings,
        db_engine=db_engine,
        sessions=SessionAsync,
        http=http,
        redis=r,
        orders=orders,
        catalog=catalog,
        gateway=gateway,
        resolver=resolver,
        engine=engine,
        provisioner=provisioner,
        sink=sink,
        worker=worker,
    )
