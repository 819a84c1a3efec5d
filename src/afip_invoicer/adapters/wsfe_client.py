"""
WSFEv1 adapter — voucher numbering, CAE authorization and code tables.

Adapter layer — implements the InvoiceAuthorizer port on top of the shared
SoapTransport. One explicit serializer and one explicit parser per message
shape; nothing is derived by reflection, so element order always matches
the service schema.

Operations:
  FECompUltimoAutorizado          → last authorized voucher number
  FECAESolicitar                  → CAE for one or more vouchers
  FEDummy                         → backend health (no Auth)
  FEParamGetTiposCbte             → voucher types
  FEParamGetTiposDoc              → document types
  FEParamGetCondicionIvaReceptor  → buyer VAT conditions

Wire formats: amounts with exactly two decimals, dates YYYYMMDD,
FchProceso YYYYMMDDhhmmss.

A rejected CAE request (Resultado "R") is returned as a result carrying
errors and observations; it is never raised and never resubmitted.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import date, datetime
from decimal import Decimal
from typing import TypeVar

import structlog
from lxml import etree

from afip_invoicer.adapters.soap import (
    SoapTransport,
    add,
    find,
    find_all,
    find_text,
    new_envelope,
    serialize,
)
from afip_invoicer.domain.errors import ParseError, RemoteBusinessError
from afip_invoicer.domain.models import (
    APPROVED,
    REJECTED,
    AuthBlock,
    CatalogItem,
    InvoiceAuthorizationRequest,
    InvoiceAuthorizationResult,
    InvoiceDetail,
    LastVoucher,
    RemoteMessage,
    ServerStatus,
    wire_amount,
)

log = structlog.get_logger()

T = TypeVar("T")

WSFE_NS = "http://ar.gov.afip.dif.FEV1/"
WSFE_PRODUCTION_URL = "https://servicios1.afip.gov.ar/wsfev1/service.asmx"
WSFE_SANDBOX_URL = "https://wswhomo.afip.gov.ar/wsfev1/service.asmx"


def wsfe_url(production: bool) -> str:
    return WSFE_PRODUCTION_URL if production else WSFE_SANDBOX_URL


# ─────────────────────── Wire formats ───────────────────────


def format_amount(value: Decimal) -> str:
    return f"{wire_amount(value):.2f}"


def format_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def parse_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y%m%d").date()
    except ValueError as e:
        raise ParseError(f"Invalid WSFEv1 date {value!r}", raw_response=value) from e


def parse_process_time(value: str | None) -> datetime | None:
    """FchProceso is YYYYMMDDhhmmss; some environments send only YYYYMMDD."""
    if not value:
        return None
    for fmt in ("%Y%m%d%H%M%S", "%Y%m%d"):
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    raise ParseError(f"Invalid WSFEv1 process time {value!r}", raw_response=value)


def _int(value: str | None, name: str, default: int | None = None) -> int:
    if value is None or value == "":
        if default is not None:
            return default
        raise ParseError(f"Response is missing required element {name}")
    try:
        return int(value)
    except ValueError as e:
        raise ParseError(f"Element {name} is not an integer: {value!r}", raw_response=value) from e


def _messages(element: etree._Element | None, path: str) -> tuple[RemoteMessage, ...]:
    """Collect Err / Obs / Evt entries (Code + Msg) found under `path`."""
    if element is None:
        return ()
    return tuple(
        RemoteMessage(
            code=_int(find_text(item, "Code"), "Code", default=0),
            message=find_text(item, "Msg") or "",
        )
        for item in find_all(element, path)
    )


# ─────────────────────── Serializers ───────────────────────


def _add_auth(operation: etree._Element, auth: AuthBlock) -> None:
    block = add(operation, "Auth")
    add(block, "Token", auth.token)
    add(block, "Sign", auth.sign)
    add(block, "Cuit", auth.cuit)


def build_last_voucher_envelope(auth: AuthBlock, point_of_sale: int, voucher_type: int) -> bytes:
    envelope, operation = new_envelope(WSFE_NS, "FECompUltimoAutorizado")
    _add_auth(operation, auth)
    add(operation, "PtoVta", point_of_sale)
    add(operation, "CbteTipo", int(voucher_type))
    return serialize(envelope)


def _add_detail(parent: etree._Element, detail: InvoiceDetail) -> None:
    det = add(parent, "FECAEDetRequest")
    add(det, "Concepto", int(detail.concept))
    add(det, "DocTipo", int(detail.document_type))
    add(det, "DocNro", detail.document_number)
    add(det, "CbteDesde", detail.number_from)
    add(det, "CbteHasta", detail.number_to)
    add(det, "CbteFch", format_date(detail.issue_date))
    add(det, "ImpTotal", format_amount(detail.total))
    add(det, "ImpTotConc", format_amount(detail.non_taxed))
    add(det, "ImpNeto", format_amount(detail.net))
    add(det, "ImpOpEx", format_amount(detail.exempt))
    add(det, "ImpTrib", format_amount(detail.other_taxes))
    add(det, "ImpIVA", format_amount(detail.vat))
    if detail.service_from is not None:
        add(det, "FchServDesde", format_date(detail.service_from))
    if detail.service_to is not None:
        add(det, "FchServHasta", format_date(detail.service_to))
    if detail.payment_due is not None:
        add(det, "FchVtoPago", format_date(detail.payment_due))
    add(det, "MonId", detail.currency)
    add(det, "MonCotiz", format_amount(detail.exchange_rate))
    add(det, "CondicionIVAReceptorId", int(detail.vat_condition))
    if detail.taxes:
        taxes = add(det, "Tributos")
        for tax in detail.taxes:
            item = add(taxes, "Tributo")
            add(item, "Id", tax.id)
            add(item, "Desc", tax.description)
            add(item, "BaseImp", format_amount(tax.base))
            add(item, "Alic", format_amount(tax.rate))
            add(item, "Importe", format_amount(tax.amount))
    if detail.vat_rates:
        rates = add(det, "Iva")
        for rate in detail.vat_rates:
            item = add(rates, "AlicIva")
            add(item, "Id", int(rate.id))
            add(item, "BaseImp", format_amount(rate.base))
            add(item, "Importe", format_amount(rate.amount))


def build_authorization_envelope(auth: AuthBlock, request: InvoiceAuthorizationRequest) -> bytes:
    envelope, operation = new_envelope(WSFE_NS, "FECAESolicitar")
    _add_auth(operation, auth)
    fe_request = add(operation, "FeCAEReq")
    header = add(fe_request, "FeCabReq")
    add(header, "CantReg", request.header.batch_count)
    add(header, "PtoVta", request.header.point_of_sale)
    add(header, "CbteTipo", int(request.header.voucher_type))
    details = add(fe_request, "FeDetReq")
    for detail in request.details:
        _add_detail(details, detail)
    return serialize(envelope)


def build_dummy_envelope() -> bytes:
    envelope, _operation = new_envelope(WSFE_NS, "FEDummy")
    return serialize(envelope)


def build_catalog_envelope(operation_name: str, auth: AuthBlock) -> bytes:
    envelope, operation = new_envelope(WSFE_NS, operation_name)
    _add_auth(operation, auth)
    return serialize(envelope)


# ─────────────────────── Parsers ───────────────────────


def _result(body: etree._Element, operation: str) -> etree._Element:
    result = find(body, f"{operation}Response/{operation}Result")
    if result is None:
        raise ParseError(
            f"{operation} response has no {operation}Result",
            raw_response=etree.tostring(body, encoding="unicode"),
        )
    return result


def parse_last_voucher(body: etree._Element) -> LastVoucher:
    result = _result(body, "FECompUltimoAutorizado")
    errors = _messages(result, "Errors/Err")
    if errors:
        raise RemoteBusinessError("FECompUltimoAutorizado", errors)
    return LastVoucher(
        point_of_sale=_int(find_text(result, "PtoVta"), "PtoVta"),
        voucher_type=_int(find_text(result, "CbteTipo"), "CbteTipo"),
        number=_int(find_text(result, "CbteNro"), "CbteNro"),
    )


def parse_authorization(
    body: etree._Element, request: InvoiceAuthorizationRequest
) -> InvoiceAuthorizationResult:
    """
    Parse FECAESolicitarResult into an InvoiceAuthorizationResult.

    When the service rejects the whole request (invalid auth, malformed
    header) FeCabResp may be missing; the result is then a rejection
    carrying the request's point of sale and voucher type.
    """
    result = _result(body, "FECAESolicitar")
    header = find(result, "FeCabResp")
    detail = find(result, "FeDetResp/FECAEDetResponse")

    result_code = (find_text(header, "Resultado") if header is not None else None) or REJECTED
    point_of_sale = request.header.point_of_sale
    voucher_type = int(request.header.voucher_type)
    processed_at = None
    if header is not None:
        point_of_sale = _int(find_text(header, "PtoVta"), "PtoVta", default=point_of_sale)
        voucher_type = _int(find_text(header, "CbteTipo"), "CbteTipo", default=voucher_type)
        processed_at = parse_process_time(find_text(header, "FchProceso"))

    voucher_number = None
    cae = None
    cae_expiration = None
    detail_result_code = None
    observations: tuple[RemoteMessage, ...] = ()
    if detail is not None:
        raw_number = find_text(detail, "CbteDesde")
        voucher_number = _int(raw_number, "CbteDesde") if raw_number else None
        cae = find_text(detail, "CAE") or None
        cae_expiration = parse_date(find_text(detail, "CAEFchVto"))
        detail_result_code = find_text(detail, "Resultado") or None
        observations = _messages(detail, "Observaciones/Obs")

    return InvoiceAuthorizationResult(
        success=result_code == APPROVED,
        result_code=result_code,
        point_of_sale=point_of_sale,
        voucher_type=voucher_type,
        voucher_number=voucher_number,
        cae=cae,
        cae_expiration=cae_expiration,
        processed_at=processed_at,
        detail_result_code=detail_result_code,
        errors=_messages(result, "Errors/Err"),
        observations=observations,
        events=_messages(result, "Events/Evt"),
    )


def parse_dummy(body: etree._Element) -> ServerStatus:
    result = _result(body, "FEDummy")
    return ServerStatus(
        app_server=find_text(result, "AppServer") or "",
        db_server=find_text(result, "DbServer") or "",
        auth_server=find_text(result, "AuthServer") or "",
    )


def parse_catalog(body: etree._Element, operation: str, item_tag: str) -> tuple[CatalogItem, ...]:
    result = _result(body, operation)
    errors = _messages(result, "Errors/Err")
    if errors:
        raise RemoteBusinessError(operation, errors)
    return tuple(
        CatalogItem(
            id=_int(find_text(item, "Id"), "Id"),
            description=find_text(item, "Desc") or "",
            valid_from=find_text(item, "FchDesde") or None,
            valid_to=find_text(item, "FchHasta") or None,
        )
        for item in find_all(result, f"ResultGet/{item_tag}")
    )


# ─────────────────────── Client ───────────────────────


class WsfeClient:
    """
    WSFEv1 electronic invoicing client.

    Implements the InvoiceAuthorizer port. Stateless: the Auth block is
    passed in on every call.
    """

    def __init__(self, transport: SoapTransport) -> None:
        self._transport = transport

    async def get_last_voucher(
        self, auth: AuthBlock, point_of_sale: int, voucher_type: int
    ) -> LastVoucher:
        body = await self._call(
            "FECompUltimoAutorizado",
            build_last_voucher_envelope(auth, point_of_sale, voucher_type),
        )
        last = self._parse("FECompUltimoAutorizado", body, parse_last_voucher)
        log.info(
            "wsfe.last_voucher",
            point_of_sale=last.point_of_sale,
            voucher_type=last.voucher_type,
            number=last.number,
        )
        return last

    async def get_last_voucher_number(
        self, auth: AuthBlock, point_of_sale: int, voucher_type: int
    ) -> int:
        """Last authorized number for (point of sale, voucher type); 0 when none exists yet."""
        return (await self.get_last_voucher(auth, point_of_sale, voucher_type)).number

    async def request_authorization(
        self, auth: AuthBlock, request: InvoiceAuthorizationRequest
    ) -> InvoiceAuthorizationResult:
        log.info(
            "wsfe.cae_requested",
            point_of_sale=request.header.point_of_sale,
            voucher_type=int(request.header.voucher_type),
            number_from=request.details[0].number_from,
            number_to=request.details[-1].number_to,
            total=format_amount(request.details[0].total),
        )
        body = await self._call("FECAESolicitar", build_authorization_envelope(auth, request))
        result = self._parse("FECAESolicitar", body, lambda b: parse_authorization(b, request))

        if result.success:
            log.info(
                "wsfe.cae_approved",
                voucher_number=result.voucher_number,
                cae=result.cae,
                cae_expiration=result.cae_expiration.isoformat() if result.cae_expiration else None,
                observations=len(result.observations),
            )
        else:
            log.warning(
                "wsfe.cae_rejected",
                result_code=result.result_code,
                voucher_number=result.voucher_number,
                errors=[str(err) for err in result.errors],
                observations=[str(obs) for obs in result.observations],
            )
        return result

    async def dummy(self) -> ServerStatus:
        body = await self._call("FEDummy", build_dummy_envelope())
        status = self._parse("FEDummy", body, parse_dummy)
        log.info(
            "wsfe.dummy",
            app_server=status.app_server,
            db_server=status.db_server,
            auth_server=status.auth_server,
        )
        return status

    async def get_voucher_types(self, auth: AuthBlock) -> tuple[CatalogItem, ...]:
        return await self._catalog("FEParamGetTiposCbte", "CbteTipo", auth)

    async def get_document_types(self, auth: AuthBlock) -> tuple[CatalogItem, ...]:
        return await self._catalog("FEParamGetTiposDoc", "DocTipo", auth)

    async def get_vat_conditions(self, auth: AuthBlock) -> tuple[CatalogItem, ...]:
        return await self._catalog("FEParamGetCondicionIvaReceptor", "CondicionIvaReceptor", auth)

    async def _catalog(self, operation: str, item_tag: str, auth: AuthBlock) -> tuple[CatalogItem, ...]:
        body = await self._call(operation, build_catalog_envelope(operation, auth))
        items = self._parse(operation, body, lambda b: parse_catalog(b, operation, item_tag))
        log.info("wsfe.catalog_loaded", operation=operation, items=len(items))
        return items

    async def _call(self, operation: str, envelope: bytes) -> etree._Element:
        return await self._transport.call(operation, envelope, soap_action=f"{WSFE_NS}{operation}")

    def _parse(
        self, operation: str, body: etree._Element, parser: Callable[[etree._Element], T]
    ) -> T:
        try:
            return parser(body)
        except ParseError as e:
            log.error("wsfe.response_invalid", operation=operation, error=e.message)
            self._transport.dump_invalid(
                operation, e.raw_response or etree.tostring(body, encoding="unicode")
            )
            raise
