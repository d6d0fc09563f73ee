from __future__ import annotations
import base64
import binascii
import hashlib
import json
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional

import httpx
import structlog
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import (
    DisabledBank, Protocol, UnknownBank, Upstream, ValidationFailed,
)
from .helpers import format_money
from .infra.timings import timeit


log = structlog.get_logger(__name__)

BANK_LIST_TIMEOUT = 30.0
REDFLOW_TIMEOUT = 30.0

MSG_TOKENS = {"individual": "01", "corporate": "02"}

SUCCESS_CODES = frozenset({"00"})
PENDING_CODES = frozenset({"AP", "09", "99"})

# gateway id used when the buyer has not pre-selected an FPX bank
DEFAULT_GATEWAY = "1963"
FPX_GATEWAY = "2"


# ----------------------------
# Callback interpretation (pure)
# ----------------------------
def status_from_code(code: Optional[str]) -> str:
    code = (code or "").strip()
    if code in SUCCESS_CODES:
        return "success"
    if code in PENDING_CODES:
        return "pending"
    return "failed"


@dataclass(frozen=True)
class CallbackOutcome:
    status: str
    raw_status: str
    order_no: str
    transaction_id: str
    transaction_date: str
    bank_code: str
    bank_name: str
    status_message: str
    msg_token: str

    def to_payload(self) -> Dict[str, str]:
        """Serialize back into the gateway's own field names."""
        return {
            "order_no": self.order_no,
            "id_transaksi": self.transaction_id,
            "status_transaksi": self.raw_status,
            "status_message": self.status_message,
            "tarikh_transaksi": self.transaction_date,
            "kod_bank": self.bank_code,
            "nama_bank": self.bank_name,
            "jp_msg_token": self.msg_token,
        }


def _field(response: Mapping, key: str) -> str:
    value = response.get(key)
    return "" if value is None else str(value).strip()


def interpret_callback(response: Mapping) -> CallbackOutcome:
    raw = _field(response, "status_transaksi")
    return CallbackOutcome(
        status=status_from_code(raw),
        raw_status=raw,
        order_no=_field(response, "order_no"),
        transaction_id=_field(response, "id_transaksi"),
        transaction_date=_field(response, "tarikh_transaksi"),
        bank_code=_field(response, "kod_bank"),
        bank_name=_field(response, "nama_bank"),
        status_message=_field(response, "status_message"),
        msg_token=_field(response, "jp_msg_token"),
    )


# ----------------------------
# Browser return payload
# ----------------------------
def _b64(part: str) -> bytes:
    part = part.replace("\\/", "/").replace(" ", "+")
    return base64.b64decode(part, validate=True)


def decrypt_return_payload(payload: str, api_key: str) -> Dict[str, str]:
    """
    Decode ``IV:ciphertext`` (both base64) sent with the browser return.
    AES-256-CBC, key = first 32 bytes of the API key, PKCS7 padded JSON.
    """
    text = (payload or "").strip().strip('"')
    iv_part, sep, ct_part = text.partition(":")
    if not sep or not iv_part or not ct_part:
        raise ValidationFailed("invalid payment payload")

    key = api_key.encode()[:32]
    if len(key) != 32:
        raise ValidationFailed(
            "invalid payment payload", detail="api key shorter than 32 bytes"
        )

    try:
        iv = _b64(iv_part)
        ciphertext = _b64(ct_part)
        decryptor = Cipher(algorithms.AES(key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()
        unpadder = padding.PKCS7(128).unpadder()
        plain = unpadder.update(padded) + unpadder.finalize()
        data = json.loads(plain.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeDecodeError) as e:
        raise ValidationFailed("invalid payment payload", detail=repr(e)) from e

    if not isinstance(data, dict):
        raise ValidationFailed("invalid payment payload",
                               detail="payload is not an object")
    return data


def checksum(buyer_name: str, ag_token: str, order_no: str,
             total_amount: str) -> str:
    raw = f"{buyer_name}{ag_token}{order_no}{total_amount}"
    return hashlib.sha512(raw.encode()).hexdigest()


# ----------------------------
# Gateway client
# ----------------------------
@dataclass
class Bank:
    value: str
    name: str
    enabled: bool


@dataclass
class RedirectForm:
    action: str
    fields: Dict[str, str]


def _enabled(value) -> bool:
    return str(value).strip().lower() in ("1", "true")


class PaymentGateway:
    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        base_url: str,
        api_key: str,
        ag_token: str,
        public_base_url: str,
    ) -> None:
        self.http = http
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.ag_token = ag_token
        self.public_base_url = public_base_url.rstrip("/")

    @staticmethod
    def msg_token(mode: Optional[str]) -> str:
        if not mode:
            return ""
        try:
            return MSG_TOKENS[mode]
        except KeyError:
            raise ValidationFailed(f"invalid mode: {mode}") from None

    async def bank_list(self, mode: str) -> List[Bank]:
        token = self.msg_token(mode)
        try:
            async with timeit("gateway.banklist"):
                resp = await self.http.post(
                    f"{self.base_url}/JP_gateway/getBankList",
                    data={
                        "jp_ag_token": self.ag_token,
                        "method": "getBankList",
                        "mode": token,
                    },
                    headers={"jp-api-key": self.api_key},
                    timeout=BANK_LIST_TIMEOUT,
                )
        except httpx.HTTPError as e:
            raise Upstream("bank list request failed", detail=repr(e)) from e

        if resp.status_code != 200:
            raise Upstream(f"bank list returned {resp.status_code}",
                           detail=resp.text[:500])
        try:
            body = resp.json()
            raw = body.get("data")
            entries = json.loads(raw) if isinstance(raw, str) else raw
        except (ValueError, AttributeError) as e:
            raise Protocol("bank list: invalid JSON",
                           detail=resp.text[:500]) from e

        if not body.get("success") or not isinstance(entries, list):
            raise Protocol("bank list: unsuccessful response",
                           detail=resp.text[:500])

        return [
            Bank(
                value=str(e.get("value") or ""),
                name=str(e.get("name") or ""),
                enabled=_enabled(e.get("enabled")),
            )
            for e in entries
            if isinstance(e, dict)
        ]

    async def bank_name(self, bank_code: str, mode: str) -> str:
        for bank in await self.bank_list(mode):
            if bank.value != bank_code:
                continue
            if not bank.enabled:
                log.info("gateway.bank_disabled", bank_code=bank_code)
                raise DisabledBank(f"bank {bank_code} is currently unavailable")
            return bank.name
        raise UnknownBank(f"unknown bank code: {bank_code}")

    async def redirect_token(self) -> str:
        try:
            async with timeit("gateway.redflow"):
                resp = await self.http.post(
                    f"{self.base_url}/JP_gateway/redflow",
                    data={
                        "jp_ag_token": self.ag_token,
                        "method": "getRedirectUrl",
                        "jp_gateway": FPX_GATEWAY,
                    },
                    headers={"jp-api-key": self.api_key},
                    timeout=REDFLOW_TIMEOUT,
                )
        except httpx.HTTPError as e:
            raise Upstream("redirect token request failed",
                           detail=repr(e)) from e

        if resp.status_code != 200:
            raise Upstream(f"redirect token returned {resp.status_code}",
                           detail=resp.text[:500])
        try:
            body = resp.json()
        except ValueError as e:
            raise Protocol("redirect token: invalid JSON",
                           detail=resp.text[:500]) from e
        if not isinstance(body, dict):
            raise Protocol("redirect token: expected an object",
                           detail=resp.text[:500])

        msg = body.get("response_msg")
        token = msg.get("rand_key") if isinstance(msg, dict) else None
        if not body.get("success") or not token:
            raise Upstream("redirect token refused", detail=resp.text[:500])
        return str(token)

    def build_redirect(self, order, token: str) -> RedirectForm:
        amount = format_money(order.total_amount)
        fields = {
            "jp_buyer_name": order.buyer_name,
            "jp_token": token,
            "jp_ag_token": self.ag_token,
            "bill_id": order.bill_id,
            "jp_order_no": order.order_no,
            "jp_total_amount": amount,
            "jp_product_id": order.product_id,
            "jp_product_desc": order.product_desc,
            "jp_email": order.buyer_email,
            "method": "getRedirectUrl",
            "jp_redirect_url": f"{self.public_base_url}/api/payment/return",
            "jp_checksum": checksum(
                order.buyer_name, self.ag_token, order.order_no, amount
            ),
        }
        if order.bank_code:
            fields["jp_bank_code"] = order.bank_code
        if order.msg_token:
            fields["jp_msg_token"] = order.msg_token
        fields["jp_gateway"] = (
            FPX_GATEWAY if order.bank_code and order.msg_token
            else DEFAULT_GATEWAY
        )
        return RedirectForm(
            action=f"{self.base_url}/jpgate/JP_Redirect/baseRedirect",
            fields=fields,
        )
