"""
Error taxonomy of the order lifecycle.

Every error carries the HTTP status it maps to, a stable ``code``, the
message that may be shown to a caller, and an optional ``detail`` that is
only ever logged (upstream bodies, gateway status codes, ...).
"""
from __future__ import annotations
from typing import Optional


UNAVAILABLE = "service temporarily unavailable"


class TicketingError(Exception):
    status_code = 500
    code = "internal"

    def __init__(self, message: str, *, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    @property
    def public_message(self) -> str:
        return self.message


class ValidationFailed(TicketingError):
    status_code = 400
    code = "validation"


class CatalogMiss(TicketingError):
    status_code = 400
    code = "catalog_miss"


class Inactive(TicketingError):
    status_code = 400
    code = "inactive"


class UnknownBank(TicketingError):
    status_code = 400
    code = "unknown_bank"


class DisabledBank(TicketingError):
    status_code = 400
    code = "disabled_bank"


class Forbidden(TicketingError):
    status_code = 403
    code = "forbidden"


class OrderNotFound(TicketingError):
    status_code = 404
    code = "not_found"


class DuplicateCreation(TicketingError):
    status_code = 409
    code = "duplicate"


class PartialPersist(TicketingError):
    status_code = 500
    code = "partial_persist"

    @property
    def public_message(self) -> str:
        return "failed to create order"


class Upstream(TicketingError):
    status_code = 502
    code = "upstream"

    @property
    def public_message(self) -> str:
        return UNAVAILABLE


class Protocol(TicketingError):
    status_code = 502
    code = "protocol"

    @property
    def public_message(self) -> str:
        return UNAVAILABLE
