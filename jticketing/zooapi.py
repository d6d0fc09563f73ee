"""
Client for the attraction's ticket issuance API.

Three calls are used: a password-grant token, the online item list for a
visit date, and the purchase call that returns one encrypted ticket per
admitted unit.
"""
from __future__ import annotations
import json
from dataclasses import dataclass
from typing import Dict, List

import httpx
import structlog

from .errors import Upstream, Protocol
from .infra.timings import timeit


log = structlog.get_logger(__name__)

TOKEN_TIMEOUT = 30.0
ISSUE_TIMEOUT = 60.0
ZOO_JOHOR = "Zoo Johor"


@dataclass
class IssuedTicket:
    twbid: str
    item_id: str
    encrypted_id: str
    admit_date: str
    unit_price: str
    item_desc: str = ""
    item_desc2: str = ""
    item_desc3: str = ""


@dataclass
class PurchaseResult:
    status_code: str
    receipt_number: str
    tickets: List[IssuedTicket]


def _short(body: str) -> str:
    return body[:500]


def _json(resp: httpx.Response, what: str):
    try:
        return resp.json()
    except (json.JSONDecodeError, ValueError) as e:
        raise Protocol(
            f"{what}: invalid JSON", detail=_short(resp.text)
        ) from e


class ZooClient:
    def __init__(
        self, http: httpx.AsyncClient, *, base_url: str, user: str,
        password: str,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.user = user
        self.password = password

    async def get_token(self) -> str:
        try:
            async with timeit("zoo.token"):
                resp = await self.http.post(
                    f"{self.base_url}/Token",
                    data={
                        "grant_type": "password",
                        "UserName": self.user,
                        "Password": self.password,
                    },
                    timeout=TOKEN_TIMEOUT,
                )
        except httpx.HTTPError as e:
            raise Upstream("token request failed", detail=repr(e)) from e

        if resp.status_code != 200:
            raise Upstream(
                f"token request returned {resp.status_code}",
                detail=_short(resp.text),
            )
        body = _json(resp, "token")
        token = body.get("access_token") if isinstance(body, dict) else None
        if not token:
            raise Upstream("token response without access_token")
        return token

    async def online_items(
        self, group_name: str, tran_date: str
    ) -> List[Dict]:
        """Items sellable on ``tran_date`` (``yyyy-mm-dd``)."""
        token = await self.get_token()
        endpoint = "GetOnlineItem" if group_name == ZOO_JOHOR else "GetOnlineItem2"
        try:
            async with timeit("zoo.items"):
                resp = await self.http.get(
                    f"{self.base_url}/api/JohorZoo/{endpoint}",
                    params={"TranDate": tran_date},
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=TOKEN_TIMEOUT,
                )
        except httpx.HTTPError as e:
            raise Upstream("item list request failed", detail=repr(e)) from e

        if resp.status_code != 200:
            raise Upstream(
                f"item list returned {resp.status_code}",
                detail=_short(resp.text),
            )
        items = _json(resp, "item list")
        if not isinstance(items, list) or not all(
            isinstance(it, dict) for it in items
        ):
            raise Protocol("item list: expected an array of objects",
                           detail=_short(resp.text))
        return items

    async def purchase(
        self, tran_date: str, reference_no: str, items: Dict[str, int]
    ) -> PurchaseResult:
        token = await self.get_token()
        payload = {
            "TranDate": tran_date,
            "ReferenceNo": reference_no,
            "Items": [{"ItemId": k, "Qty": v} for k, v in items.items()],
        }
        try:
            async with timeit("zoo.purchase"):
                resp = await self.http.post(
                    f"{self.base_url}/api/JohorZoo/PostOnlinePurchase2",
                    json=payload,
                    headers={"Authorization": f"Bearer {token}"},
                    timeout=ISSUE_TIMEOUT,
                )
        except httpx.HTTPError as e:
            raise Upstream("issuance request failed", detail=repr(e)) from e

        if resp.status_code != 200:
            raise Upstream(
                f"issuance returned {resp.status_code}",
                detail=_short(resp.text),
            )
        body = _json(resp, "issuance")
        if not isinstance(body, dict):
            raise Protocol("issuance: expected an object",
                           detail=_short(resp.text))

        status = str(body.get("StatusCode") or "")
        if status != "OK":
            raise Upstream(
                f"issuance status {status or 'missing'}",
                detail=_short(resp.text),
            )

        raw = body.get("Tickets") or []
        if not isinstance(raw, list) or not all(
            isinstance(t, dict) for t in raw
        ):
            raise Protocol("issuance: malformed Tickets",
                           detail=_short(resp.text))

        tickets: List[IssuedTicket] = []
        for t in raw:
            tickets.append(IssuedTicket(
                twbid=str(t.get("TWBID") or ""),
                item_id=str(t.get("ItemId") or ""),
                encrypted_id=str(t.get("EncryptedID") or ""),
                admit_date=str(t.get("AdmitDate") or ""),
                unit_price=str(t.get("UnitPrice") or ""),
                item_desc=str(t.get("ItemDesc") or ""),
                item_desc2=str(t.get("ItemDesc2") or ""),
                item_desc3=str(t.get("ItemDesc3") or ""),
            ))
        log.info("zoo.purchase", reference_no=reference_no,
                 receipt=body.get("ReceiptNumber"), tickets=len(tickets))
        return PurchaseResult(
            status_code=status,
            receipt_number=str(body.get("ReceiptNumber") or ""),
            tickets=tickets,
        )
