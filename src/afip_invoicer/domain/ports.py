"""
Ports — Protocol-based interfaces for infrastructure adapters.

These define WHAT the invoicing core needs (contracts) without specifying
HOW it's done (implementation). Following hexagonal architecture:

  Domain ← Ports (protocols) ← Adapters (implementations)

Each port is a Protocol (structural typing) so adapters satisfy
the contract simply by implementing the methods — no inheritance.

Ticket flow:
  1. TicketSigner          → signed CMS login request
  2. TicketServiceClient   → WSAA loginCms → SecurityTicket
  3. TicketStore           → survive restarts without asking WSAA again
  4. InvoiceAuthorizer     → WSFEv1 numbering + CAE authorization
"""

from __future__ import annotations

from datetime import timedelta
from typing import Protocol, runtime_checkable

from afip_invoicer.domain.models import (
    AuthBlock,
    CatalogItem,
    InvoiceAuthorizationRequest,
    InvoiceAuthorizationResult,
    LastVoucher,
    SecurityTicket,
    ServerStatus,
)


@runtime_checkable
class TicketSigner(Protocol):
    """
    Port: build and sign WSAA login ticket requests.

    The signature is an attached CMS SignedData (base64) made with the
    taxpayer's certificate, which WSAA uses to identify the caller.
    """

    def build_request(self, service_id: str, validity: timedelta = ...) -> str: ...

    def sign(self, request_xml: str) -> str: ...


@runtime_checkable
class TicketServiceClient(Protocol):
    """
    Port: obtain a fresh SecurityTicket from WSAA.

    Raises TransportError, ParseError or RemoteFaultError. Never caches.
    """

    async def login(self, service_id: str) -> SecurityTicket: ...


@runtime_checkable
class TicketStore(Protocol):
    """
    Port: durable storage of tickets, one row per service id.

    `save` raises StorageError on failure. Reads log their failures and
    behave as a miss, so a broken store degrades to "always log in".
    """

    async def save(self, ticket: SecurityTicket) -> None: ...

    async def get_valid(self, service_id: str) -> SecurityTicket | None: ...

    async def get_all_valid(self) -> list[SecurityTicket]: ...

    async def delete(self, service_id: str) -> None: ...

    async def delete_expired(self) -> int: ...


@runtime_checkable
class TicketListener(Protocol):
    """
    Observer notified on ticket lifecycle transitions.

    Listener failures are logged by the cache and never propagate.
    """

    def on_ticket_obtained(self, ticket: SecurityTicket) -> None: ...

    def on_ticket_expired(self, ticket: SecurityTicket) -> None: ...

    def on_ticket_error(self, service_id: str, error: Exception) -> None: ...


@runtime_checkable
class TicketProvider(Protocol):
    """Port: hand out a currently valid ticket for a service id."""

    async def get_valid(self, service_id: str) -> SecurityTicket: ...


@runtime_checkable
class InvoiceAuthorizer(Protocol):
    """
    Port: WSFEv1 operations used by the orchestrator.

    A rejected CAE request is a normal result, not an exception.
    """

    async def get_last_voucher_number(
        self, auth: AuthBlock, point_of_sale: int, voucher_type: int
    ) -> int: ...

    async def get_last_voucher(
        self, auth: AuthBlock, point_of_sale: int, voucher_type: int
    ) -> LastVoucher: ...

    async def request_authorization(
        self, auth: AuthBlock, request: InvoiceAuthorizationRequest
    ) -> InvoiceAuthorizationResult: ...

    async def dummy(self) -> ServerStatus: ...

    async def get_voucher_types(self, auth: AuthBlock) -> tuple[CatalogItem, ...]: ...

    async def get_document_types(self, auth: AuthBlock) -> tuple[CatalogItem, ...]: ...

    async def get_vat_conditions(self, auth: AuthBlock) -> tuple[CatalogItem, ...]: ...
