# tests/conftest.py
from __future__ import annotations

import base64
import json
import os
from decimal import Decimal
from typing import Dict, List
from urllib.parse import parse_qs

import httpx
import pytest
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from httpx import AsyncClient, ASGITransport
from sqlalchemy import func, select

from jticketing.config import Settings
from jticketing.errors import Upstream
from jticketing.model.catalog.orm import Customer, TicketGroup, TicketVariant
from jticketing.model.db import create_schema
from jticketing.model.order.orm import OrderTicketGroup
from jticketing.server import create_app


API_KEY = "k" * 32 + "-rest-of-the-api-key"


# Make anyio run on asyncio (so our async fixtures work everywhere)
@pytest.fixture(scope="session", autouse=True)
def anyio_backend():
    return "asyncio"


# ==============================================================
# Fake upstreams: payment gateway + ticket issuance API
# ==============================================================
class FakeUpstream:
    def __init__(self) -> None:
        self.banks = [
            {"value": "MB2U", "enabled": 1, "name": "Maybank2u"},
            {"value": "BIMB", "enabled": "1", "name": "Bank Islam"},
            {"value": "XYZ", "enabled": 0, "name": "Offline Bank"},
        ]
        self.items = [
            {"ItemId": "TIC-O-0020", "UnitPrice": 5.0,
             "ItemDescription": "Dewasa", "ItemDesc1": "Adult",
             "ItemDesc2": "成人", "PrintType": "Q", "Qty": 1},
            {"ItemId": "TIC-O-0021", "UnitPrice": 3.0,
             "ItemDescription": "Kanak-kanak", "ItemDesc1": "Child",
             "ItemDesc2": "儿童", "PrintType": "Q", "Qty": 1},
            {"ItemId": "TIC-O-0000", "UnitPrice": 0,
             "ItemDescription": "Warga Emas", "ItemDesc1": "Senior",
             "ItemDesc2": "老人", "PrintType": "Q", "Qty": 1},
            {"ItemId": "TIC-O-0099", "UnitPrice": 9.0,
             "ItemDescription": "Pakej", "ItemDesc1": "Package",
             "ItemDesc2": "套餐", "PrintType": "Q", "Qty": 1},
        ]
        self.issued_prices: Dict[str, float] = {}
        self.issue_status = "OK"
        self.short_by = 0
        self.items_down = False
        self.junk_tickets: List = []
        self.calls: List[tuple] = []
        self.purchases: List[dict] = []
        self.bank_modes: List[str] = []
        self._serial = 0

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.calls if p == path)

    def _price(self, item_id: str) -> float:
        if item_id in self.issued_prices:
            return self.issued_prices[item_id]
        for it in self.items:
            if it["ItemId"] == item_id:
                return float(it["UnitPrice"])
        return 0.0

    def handle(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if path == "/Token":
            return httpx.Response(
                200, json={"access_token": "zoo-token", "token_type": "bearer"}
            )
        if path.startswith("/api/JohorZoo/GetOnlineItem"):
            if self.items_down:
                return httpx.Response(503, text="maintenance")
            return httpx.Response(200, json=self.items)
        if path == "/api/JohorZoo/PostOnlinePurchase2":
            body = json.loads(request.content)
            self.purchases.append(body)
            tickets = []
            for item in body["Items"]:
                for _ in range(item["Qty"]):
                    self._serial += 1
                    tickets.append({
                        "TWBID": f"TW{self._serial}",
                        "ItemId": item["ItemId"],
                        "EncryptedID": f"E{self._serial}",
                        "AdmitDate": body["TranDate"],
                        "UnitPrice": f"{self._price(item['ItemId']):.2f}",
                        "ItemDesc": "Dewasa",
                        "ItemDesc2": "Adult",
                        "ItemDesc3": "成人",
                    })
            if self.short_by:
                tickets = tickets[: len(tickets) - self.short_by]
            tickets.extend(self.junk_tickets)
            return httpx.Response(200, json={
                "StatusCode": self.issue_status,
                "ReceiptNumber": "R-0001",
                "Tickets": tickets,
            })
        if path == "/JP_gateway/getBankList":
            form = parse_qs(request.content.decode())
            self.bank_modes.append(form.get("mode", [""])[0])
            return httpx.Response(
                200, json={"success": True, "data": json.dumps(self.banks)}
            )
        if path == "/JP_gateway/redflow":
            return httpx.Response(
                200, json={"success": True, "response_msg": {"rand_key": "RK-1"}}
            )
        return httpx.Response(404, text="not found")


class RecordingSink:
    def __init__(self) -> None:
        self.messages = []
        self.fail = False

    async def send(self, message) -> None:
        if self.fail:
            raise Upstream("mail relay refused", detail="421 try later")
        self.messages.append(message)


# ==============================================================
# Catalog fixtures
# ==============================================================
async def seed_catalog(sessions) -> None:
    async with sessions() as db:
        async with db.begin():
            db.add_all([
                TicketGroup(
                    id=1, group_name="Zoo Johor", group_name_bm="Zoo Johor",
                    group_name_en="Zoo Johor", group_name_cn="柔佛动物园",
                    is_active=True, is_ticket_internal=False,
                    ticket_ids="TIC-O-0020,TIC-O-0021,TIC-O-0000",
                ),
                TicketGroup(
                    id=2, group_name="Taman Botani Diraja Johor",
                    group_name_en="Royal Johor Botanical Garden",
                    is_active=True, is_ticket_internal=True,
                ),
                TicketGroup(
                    id=3, group_name="Closed Garden", is_active=False,
                    is_ticket_internal=True,
                ),
                TicketGroup(
                    id=4, group_name="Taman Rekreasi", is_active=True,
                    is_ticket_internal=False,
                ),
                TicketGroup(
                    id=5, group_name="Expo 2019", is_active=True,
                    is_ticket_internal=True,
                    active_start_date="20190101", active_end_date="20191231",
                ),
            ])
            await db.flush()
            db.add_all([
                TicketVariant(
                    ticket_group_id=2, ticket_id="BTN-ADULT",
                    name_bm="Dewasa", name_en="Adult", name_cn="成人",
                    unit_price=Decimal("8.00"), print_type="Q",
                ),
                TicketVariant(
                    ticket_group_id=2, ticket_id="BTN-SENIOR",
                    name_bm="Warga Emas", name_en="Senior", name_cn="老人",
                    unit_price=Decimal("0.00"), print_type="Q",
                ),
                TicketVariant(
                    ticket_group_id=5, ticket_id="EXPO",
                    name_en="Expo", unit_price=Decimal("1.00"),
                ),
                Customer(
                    cust_id="C001", full_name="Siti Nurhaliza",
                    email="siti@example.com", contact_no="0198765432",
                    identification_no="850505-05-5555",
                ),
                Customer(
                    cust_id="C002", full_name="Lim Wei",
                    email="lim@example.com", contact_no="0121112222",
                    identification_no="880808-08-8888",
                ),
            ])


# ==============================================================
# App + clients
# ==============================================================
@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'jticketing-test.db'}",
        payment_gateway_url="https://pay.test",
        payment_api_key=API_KEY,
        payment_ag_token="ZOO",
        public_base_url="https://api.test",
        frontend_base_url="https://shop.test",
        zoo_base_url="https://zoo.test",
        zoo_user="api-user",
        zoo_pass="api-pass",
        sweep_enabled=False,
        log_level=os.getenv("TEST_LOG_LEVEL", "WARNING"),
        log_format="console",
    )


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
async def app(settings, upstream, sink):
    http = httpx.AsyncClient(transport=httpx.MockTransport(upstream.handle))
    app = create_app(settings, http=http, sink=sink)
    services = app.state.services
    await create_schema(services.db_engine)
    await seed_catalog(services.sessions)
    yield app
    await services.close()


@pytest.fixture
def services(app):
    return app.state.services


@pytest.fixture
def engine(services):
    return services.engine


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as c:
        yield c


@pytest.fixture
def count_orders(services):
    async def _count() -> int:
        async with services.sessions() as db:
            return (await db.execute(
                select(func.count()).select_from(OrderTicketGroup)
            )).scalar_one()
    return _count


# ==============================================================
# Request bodies / payloads
# ==============================================================
@pytest.fixture
def paid_body() -> dict:
    return {
        "ticketGroupId": 1,
        "date": "2025-05-21",
        "langChosen": "en",
        "paymentType": "fpx",
        "mode": "individual",
        "bankCode": "MB2U",
        "tickets": [{"ticketId": "TIC-O-0020", "qty": 2}],
        "identificationNo": "900101-01-1234",
        "fullName": "Aminah Binti Ali",
        "email": "aminah@example.com",
        "contactNo": "0123456789",
    }


@pytest.fixture
def free_body(paid_body) -> dict:
    body = {k: v for k, v in paid_body.items()
            if k not in ("paymentType", "mode", "bankCode")}
    body["tickets"] = [{"ticketId": "TIC-O-0000", "qty": 1}]
    return body


@pytest.fixture
def encrypt_payload():
    def _encrypt(data: dict, key: str = API_KEY) -> str:
        iv = os.urandom(16)
        padder = padding.PKCS7(128).padder()
        plain = padder.update(json.dumps(data).encode()) + padder.finalize()
        enc = Cipher(
            algorithms.AES(key.encode()[:32]), modes.CBC(iv)
        ).encryptor()
        ct = enc.update(plain) + enc.finalize()
        return (
            base64.b64encode(iv).decode() + ":" + base64.b64encode(ct).decode()
        )
    return _encrypt
