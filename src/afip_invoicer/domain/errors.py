"""
Error taxonomy — typed exceptions for every failure the AFIP core can surface.

Each exception carries a structured ErrorCode (organized by HTTP status range
for natural REST mapping) plus a human-readable message. The orchestrator
attaches the failing step via `step` before re-raising, so callers can tell
"ticket acquisition failed" from "CAE request failed" without string parsing.

Policy:
  - ValidationError, SigningError → never retried, surfaced immediately
  - TransportError, ParseError    → fatal for the attempt, callers may retry
  - RemoteFaultError              → surfaced as-is, except the single
                                    "already authenticated" recovery in TicketCache
  - RemoteBusinessError           → raised only by auxiliary lookups;
                                    CAE rejections travel in the result object
  - StorageError                  → raised by the ticket store on save
"""

from __future__ import annotations

from enum import Enum, unique
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from afip_invoicer.domain.models import RemoteMessage


@unique
class ErrorCode(Enum):
    """
    Structured error codes carried by every AfipError.

    Organized by HTTP status range for natural REST API mapping:
    - Client errors (4xx): VALIDATION, AUTHENTICATION, AUTHORIZATION, NOT_FOUND, BUSINESS_RULE, RATE_LIMIT
    - Server errors (5xx): TECHNICAL, DATABASE, CONFIGURATION, EXTERNAL_SERVICE, UNAVAILABLE, TIMEOUT, UNKNOWN
    """

    # --- Client-side errors (4xx HTTP range) ---
    VALIDATION_ERROR = "VALIDATION_ERROR"
    """Malformed invoice or numbering caught before the CAE request (→ 400)."""

    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    """WSAA refused to issue a ticket (→ 401)."""

    AUTHORIZATION_ERROR = "AUTHORIZATION_ERROR"
    """Certificate not enabled for the requested service (→ 403)."""

    NOT_FOUND = "NOT_FOUND"
    """Unknown service, point of sale or voucher (→ 404)."""

    BUSINESS_RULE_ERROR = "BUSINESS_RULE_ERROR"
    """WSFEv1 answered with an error list (→ 409)."""

    RATE_LIMIT_ERROR = "RATE_LIMIT_ERROR"
    """Remote request limits exceeded (→ 429)."""

    # --- Server-side errors (5xx HTTP range) ---
    TECHNICAL_ERROR = "TECHNICAL_ERROR"
    """Certificate loading or CMS signing failure (→ 500)."""

    DATABASE_ERROR = "DATABASE_ERROR"
    """Ticket store connectivity or query failures (→ 500)."""

    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"
    """Missing or invalid settings (→ 500)."""

    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    """Malformed response or SOAP fault from WSFEv1 (→ 502)."""

    SERVICE_UNAVAILABLE_ERROR = "SERVICE_UNAVAILABLE_ERROR"
    """Core not initialized yet, or startup failed (→ 503)."""

    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    """Network or HTTP-level failure reaching a SOAP endpoint (→ 504)."""

    UNKNOWN_ERROR = "UNKNOWN_ERROR"
    """Unexpected/unclassified failures (→ 500)."""


class AfipError(Exception):
    """Base class for every error raised by the AFIP core."""

    code: ErrorCode = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.step: str | None = None

    def __str__(self) -> str:
        if self.step:
            return f"[{self.step}] {self.message}"
        return self.message


class ValidationError(AfipError):
    """Input rejected locally, before any remote call."""

    code = ErrorCode.VALIDATION_ERROR


class SigningError(AfipError):
    """Certificate could not be loaded, or the CMS signature is invalid."""

    code = ErrorCode.TECHNICAL_ERROR


class TransportError(AfipError):
    """Connection, timeout or HTTP-level failure talking to a SOAP endpoint."""

    code = ErrorCode.TIMEOUT_ERROR

    def __init__(
        self,
        message: str,
        *,
        service: str,
        operation: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.service = service
        self.operation = operation
        self.status_code = status_code


class ParseError(AfipError):
    """Response received but not well-formed, or missing expected elements."""

    code = ErrorCode.EXTERNAL_SERVICE_ERROR

    def __init__(self, message: str, *, raw_response: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw_response = raw_response


WSAA_SERVICE = "wsaa"

# Fault code / message fragments WSAA uses when a ticket issued for the same
# certificate and service has not expired yet on its side.
_ALREADY_AUTHENTICATED_MARKERS = (
    "alreadyauthenticated",
    "ya posee un ta valido",
)


class RemoteFaultError(AfipError):
    """
    Well-formed SOAP fault returned by a remote service.

    A WSAA fault means no ticket was issued (AUTHENTICATION_ERROR); a fault
    from any other service is an EXTERNAL_SERVICE_ERROR.
    """

    def __init__(
        self,
        code: str,
        message: str,
        exception_name: str | None = None,
        hostname: str | None = None,
        *,
        service: str = WSAA_SERVICE,
    ) -> None:
        super().__init__(f"SOAP Fault: [{code}] {message}")
        self.code = (
            ErrorCode.AUTHENTICATION_ERROR if service == WSAA_SERVICE else ErrorCode.EXTERNAL_SERVICE_ERROR
        )
        self.service = service
        self.fault_code = code
        self.fault_message = message
        self.exception_name = exception_name
        self.hostname = hostname

    @property
    def is_already_authenticated(self) -> bool:
        """True when WSAA says a valid ticket already exists for this service."""
        haystack = f"{self.fault_code} {self.fault_message}".lower()
        return any(marker in haystack for marker in _ALREADY_AUTHENTICATED_MARKERS)


class RemoteBusinessError(AfipError):
    """Non-fault response carrying an AFIP error list."""

    code = ErrorCode.BUSINESS_RULE_ERROR

    def __init__(self, operation: str, errors: tuple[RemoteMessage, ...]) -> None:
        detail = "; ".join(str(err) for err in errors)
        super().__init__(f"{operation} rejected: {detail}")
        self.operation = operation
        self.errors = errors


class StorageError(AfipError):
    """Ticket store write failure."""

    code = ErrorCode.DATABASE_ERROR
