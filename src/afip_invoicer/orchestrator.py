"""
Invoice orchestrator — one CAE authorization, end to end.

Application layer — depends only on ports (TicketProvider, InvoiceAuthorizer).
All I/O is injected.

State machine for authorize(draft):

  validate          → the draft must produce a valid request (no I/O yet)
    → acquire_ticket      → TicketProvider.get_valid(service_id)
      → resolve_next_number → last authorized number + 1
        → build_request       → InvoiceAuthorizationRequest for that number
          → submit              → FECAESolicitar
            → translate           → sanity-check and return the result

Any AfipError raised along the way gets the failing step attached as
`error.step`, is logged and re-raised. Nothing is resubmitted: a rejected
result or a transport failure after submit is the caller's decision.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal

import structlog

from afip_invoicer.domain.errors import AfipError, ParseError, ValidationError
from afip_invoicer.domain.models import (
    AFIP_TZ,
    TYPE_C_VOUCHERS,
    AuthBlock,
    Buyer,
    CatalogItem,
    Concept,
    InvoiceAuthorizationRequest,
    InvoiceAuthorizationResult,
    InvoiceDetail,
    InvoiceDraft,
    InvoiceHeader,
    ServerStatus,
    VoucherType,
)
from afip_invoicer.domain.ports import InvoiceAuthorizer, TicketProvider

log = structlog.get_logger()

INVOICING_SERVICE_ID = "wsfe"


def _afip_today() -> date:
    return datetime.now(AFIP_TZ).date()


@contextmanager
def _step(name: str) -> Iterator[None]:
    """Attach `name` to any AfipError escaping the block, unless a step is already set."""
    try:
        yield
    except AfipError as e:
        if e.step is None:
            e.step = name
        raise


def build_request(draft: InvoiceDraft, number: int, today: date) -> InvoiceAuthorizationRequest:
    """Turn a draft into a single-voucher request numbered `number`, issued `today` by default."""
    detail = InvoiceDetail(
        concept=draft.concept,
        document_type=draft.buyer.document_type,
        document_number=draft.buyer.document_number,
        number_from=number,
        number_to=number,
        issue_date=draft.issue_date or today,
        total=draft.total,
        net=draft.resolved_net,
        vat_condition=draft.buyer.vat_condition,
        non_taxed=draft.non_taxed,
        exempt=draft.exempt,
        vat=draft.vat,
        other_taxes=draft.other_taxes,
        currency=draft.currency,
        exchange_rate=draft.exchange_rate,
        service_from=draft.service_from,
        service_to=draft.service_to,
        payment_due=draft.payment_due,
        vat_rates=draft.vat_rates,
        taxes=draft.taxes,
    )
    return InvoiceAuthorizationRequest(
        header=InvoiceHeader(point_of_sale=draft.point_of_sale, voucher_type=draft.voucher_type),
        details=(detail,),
    )


class InvoiceOrchestrator:
    """
    Drive ticket acquisition, numbering and CAE authorization.

    Numbering is read from WSFEv1 on every call, never stored locally.
    Concurrent authorizations for the same point of sale and voucher type
    must be serialized by the caller.
    """

    def __init__(
        self,
        tickets: TicketProvider,
        authorizer: InvoiceAuthorizer,
        cuit: int,
        service_id: str = INVOICING_SERVICE_ID,
        today: Callable[[], date] = _afip_today,
    ) -> None:
        self._tickets = tickets
        self._authorizer = authorizer
        self._cuit = cuit
        self._service_id = service_id
        self._today = today

    async def authorize(self, draft: InvoiceDraft) -> InvoiceAuthorizationResult:
        """Authorize one voucher described by `draft` and return the CAE outcome."""
        log.info(
            "invoice.authorization_started",
            point_of_sale=draft.point_of_sale,
            voucher_type=int(draft.voucher_type),
            total=str(draft.total),
        )
        try:
            with _step("validate"):
                build_request(draft, 1, self._today())

            with _step("acquire_ticket"):
                auth = await self._auth()

            with _step("resolve_next_number"):
                number = await self._next_number(auth, draft.point_of_sale, draft.voucher_type)

            with _step("build_request"):
                request = build_request(draft, number, self._today())

            with _step("submit"):
                result = await self._authorizer.request_authorization(auth, request)

            with _step("translate"):
                self._check_result(result, number)
        except AfipError as e:
            log.error(
                "invoice.authorization_failed",
                step=e.step,
                error_code=e.code.value,
                error=e.message,
            )
            raise

        log.info(
            "invoice.authorization_completed",
            success=result.success,
            result_code=result.result_code,
            voucher_number=result.voucher_number,
            cae=result.cae,
        )
        return result

    async def authorize_type_c(
        self,
        point_of_sale: int,
        total: Decimal,
        buyer: Buyer | None = None,
        *,
        voucher_type: int = VoucherType.INVOICE_C,
        concept: int = Concept.PRODUCTS,
        issue_date: date | None = None,
        service_from: date | None = None,
        service_to: date | None = None,
        payment_due: date | None = None,
    ) -> InvoiceAuthorizationResult:
        """Shortcut for monotax issuers: a type C voucher where net equals total."""
        try:
            with _step("validate"):
                if voucher_type not in TYPE_C_VOUCHERS:
                    raise ValidationError(f"Voucher type {voucher_type} is not a type C voucher")
                draft = InvoiceDraft(
                    point_of_sale=point_of_sale,
                    total=Decimal(total),
                    voucher_type=voucher_type,
                    concept=concept,
                    buyer=buyer or Buyer(),
                    issue_date=issue_date,
                    service_from=service_from,
                    service_to=service_to,
                    payment_due=payment_due,
                )
        except AfipError as e:
            log.error("invoice.authorization_failed", step=e.step, error_code=e.code.value, error=e.message)
            raise
        return await self.authorize(draft)

    async def next_voucher_number(self, point_of_sale: int, voucher_type: int) -> int:
        """The number the next authorized voucher would receive (informational only)."""
        with _step("acquire_ticket"):
            auth = await self._auth()
        with _step("resolve_next_number"):
            return await self._next_number(auth, point_of_sale, voucher_type)

    async def check_connection(self) -> ServerStatus:
        with _step("submit"):
            return await self._authorizer.dummy()

    async def voucher_types(self) -> tuple[CatalogItem, ...]:
        return await self._authorizer.get_voucher_types(await self._auth())

    async def document_types(self) -> tuple[CatalogItem, ...]:
        return await self._authorizer.get_document_types(await self._auth())

    async def vat_conditions(self) -> tuple[CatalogItem, ...]:
        return await self._authorizer.get_vat_conditions(await self._auth())

    async def _auth(self) -> AuthBlock:
        ticket = await self._tickets.get_valid(self._service_id)
        return AuthBlock.from_ticket(ticket, self._cuit)

    async def _next_number(self, auth: AuthBlock, point_of_sale: int, voucher_type: int) -> int:
        last = await self._authorizer.get_last_voucher_number(auth, point_of_sale, voucher_type)
        number = last + 1
        if number <= 0:
            raise ValidationError(
                f"WSFEv1 reported last voucher {last} for point of sale {point_of_sale}, "
                f"type {voucher_type}: no valid next number"
            )
        return number

    @staticmethod
    def _check_result(result: InvoiceAuthorizationResult, number: int) -> None:
        if not result.success:
            return
        if not result.cae:
            raise ParseError("FECAESolicitar approved the voucher without returning a CAE")
        if result.voucher_number is not None and result.voucher_number != number:
            log.warning(
                "invoice.number_mismatch",
                requested=number,
                authorized=result.voucher_number,
            )
