from __future__ import annotations
import asyncio
import json
import os
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

import httpx
import structlog
from fastapi import (
    APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request,
)
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from starlette.status import HTTP_303_SEE_OTHER

from .config import Settings, load_settings
from .engine import OrderEngine
from .errors import Forbidden, TicketingError, ValidationFailed
from .gateway import decrypt_return_payload
from .helpers import parse_date_strict
from .infra.logging import configure_logging
from .infra.timings import log_and_reset, timeit
from .model.catalog.orm import Customer
from .model.db import create_schema
from .notify import NotificationSink
from .schemas import (
    BankListRequest, FreeOrderRequest, PaidOrderRequest, order_dto,
)
from .wiring import Services, build_services


log = structlog.get_logger(__name__)

templates = Jinja2Templates(
    directory=os.path.join(os.path.dirname(__file__), "templates")
)

router = APIRouter()


# ----------------------------
# Dependencies
# ----------------------------
def get_services(request: Request) -> Services:
    return request.app.state.services


def get_engine(request: Request) -> OrderEngine:
    return request.app.state.services.engine


async def current_customer(
    request: Request,
    x_customer_id: Optional[str] = Header(default=None),
) -> Optional[Customer]:
    # the auth layer in front of us resolves the session to a member id
    if not x_customer_id:
        return None
    customer = await get_services(request).catalog.get_customer(x_customer_id)
    if customer is None:
        raise Forbidden("user not authorized")
    return customer


def require_customer(
    customer: Optional[Customer] = Depends(current_customer),
) -> Customer:
    if customer is None:
        raise HTTPException(status_code=401, detail="login required")
    return customer


async def _callback_payload(request: Request) -> Dict[str, Any]:
    ctype = request.headers.get("content-type", "")
    if ctype.startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError as e:
            raise ValidationFailed("invalid callback body") from e
        if not isinstance(body, dict):
            raise ValidationFailed("invalid callback body")
        return body
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


# ----------------------------
# Orders
# ----------------------------
@router.post("/api/orderTicketGroup")
async def create_paid_order(
    req: PaidOrderRequest,
    customer: Optional[Customer] = Depends(current_customer),
    engine: OrderEngine = Depends(get_engine),
):
    async with timeit("api.create_paid"):
        order, redirect = await engine.create_paid(customer, req)
    return {"orderId": order.id, "orderNo": order.order_no,
            "redirect": redirect}


@router.post("/api/orderTicketGroup/free")
async def create_free_order(
    req: FreeOrderRequest,
    customer: Optional[Customer] = Depends(current_customer),
    engine: OrderEngine = Depends(get_engine),
):
    async with timeit("api.create_free"):
        order = await engine.create_free(customer, req)
    return {"orderId": order.id, "orderNo": order.order_no}


@router.get("/api/orderTicketGroup")
async def list_member_orders(
    customer: Customer = Depends(require_customer),
    engine: OrderEngine = Depends(get_engine),
) -> List[Dict]:
    orders = await engine.member_orders(customer.cust_id)
    return [order_dto(o) for o in orders]


# declared before /{order_id} so "inquiry" is not taken for an id
@router.get("/api/orderTicketGroup/inquiry")
async def inquire_order(
    order_no: str = Query(default="", alias="orderNo"),
    email: str = "",
    engine: OrderEngine = Depends(get_engine),
):
    view = await engine.inquire(order_no, email)
    return order_dto(view.order, view.lines, view.logs)


@router.get("/api/orderTicketGroup/{order_id}")
async def get_member_order(
    order_id: int,
    customer: Customer = Depends(require_customer),
    engine: OrderEngine = Depends(get_engine),
):
    view = await engine.member_order(order_id, customer.cust_id)
    return order_dto(view.order, view.lines, view.logs)


@router.get("/api/ticketGroups/ticketVariants")
async def ticket_variants(
    ticket_group_id: int = Query(alias="ticketGroupId"),
    date: str = Query(),
    svc: Services = Depends(get_services),
) -> List[Dict]:
    try:
        day = parse_date_strict(date)
    except ValueError as e:
        raise ValidationFailed(
            "invalid date format, expected yyyy-mm-dd"
        ) from e
    group = await svc.resolver.sellable_group(ticket_group_id, day)
    variants = await svc.resolver.variants_for(group, day)
    return [v.to_dict() for v in variants]


# ----------------------------
# Payment gateway
# ----------------------------
@router.post("/api/payment/bankList")
async def bank_list(
    req: BankListRequest,
    svc: Services = Depends(get_services),
) -> List[Dict]:
    banks = await svc.gateway.bank_list(req.mode)
    return [
        {"value": b.value, "name": b.name, "enabled": b.enabled}
        for b in banks
    ]


@router.get("/api/payment/redirect/{order_no}", response_class=HTMLResponse)
async def payment_redirect(
    order_no: str,
    request: Request,
    engine: OrderEngine = Depends(get_engine),
):
    form = await engine.redirect_form(order_no)
    return templates.TemplateResponse(
        request,
        "payment_redirect.html",
        {"action": form.action, "fields": form.fields},
    )


@router.post("/api/payment/callback")
async def payment_callback(
    request: Request,
    engine: OrderEngine = Depends(get_engine),
):
    payload = await _callback_payload(request)
    async with timeit("api.callback"):
        # the gateway will not retry a dropped connection; always finish
        order = await asyncio.shield(engine.apply_gateway_callback(payload))
    return {"status": "ok", "orderNo": order.order_no,
            "transactionStatus": order.transaction_status}


@router.get("/api/payment/return")
async def payment_return(
    payload: str = "",
    svc: Services = Depends(get_services),
):
    data = decrypt_return_payload(payload, svc.settings.payment_api_key)
    order = await asyncio.shield(svc.engine.apply_gateway_callback(data))
    query = urlencode({
        "orderTicketGroupId": order.id,
        "transactionStatus": order.transaction_status,
        "orderNo": order.order_no,
    })
    return RedirectResponse(
        f"{svc.settings.frontend_base_url}/paymentRedirect?{query}",
        status_code=HTTP_303_SEE_OTHER,
    )


# ----------------------------
# Errors
# ----------------------------
async def _ticketing_error(request: Request, exc: TicketingError):
    record = dict(path=request.url.path, code=exc.code, error=exc.message,
                  detail=exc.detail)
    if exc.status_code >= 500:
        log.error("request.failed", **record)
    else:
        log.info("request.rejected", **record)
    return ORJSONResponse(
        {"detail": exc.public_message, "code": exc.code},
        status_code=exc.status_code,
    )


# ----------------------------
# App factory
# ----------------------------
def create_app(
    settings: Optional[Settings] = None,
    *,
    http: Optional[httpx.AsyncClient] = None,
    sink: Optional[NotificationSink] = None,
) -> FastAPI:
    """uvicorn jticketing.server:create_app --factory"""
    settings = settings or load_settings()
    configure_logging(settings.log_level, settings.log_format)
    services = build_services(settings, http=http, sink=sink)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await create_schema(services.db_engine)
        sweeper = None
        if settings.sweep_enabled:
            sweeper = asyncio.create_task(services.worker.run_forever())
        log.info("app.started", sweep=settings.sweep_enabled,
                 interval=settings.sweep_interval)
        try:
            yield
        finally:
            if sweeper is not None:
                # let the current order finish
                services.worker.stop()
                await sweeper
            await services.close()
            log_and_reset()
            log.info("app.stopped")

    app = FastAPI(
        title="JTicketing",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.state.services = services
    app.add_exception_handler(TicketingError, _ticketing_error)
    app.include_router(router)
    return app
