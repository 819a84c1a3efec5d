"""
FastAPI + Uvicorn ASGI application — operations surface for the invoicing core.

Runs afip-invoicer as a web service: the lifespan wires components, makes
sure the ticket table exists, warms the ticket cache and starts the
expired-ticket sweep; shutdown stops the sweep.

Endpoints:
  GET  /health                        liveness (503 when startup failed)
  GET  /info                          application metadata
  GET  /tickets                       ticket cache snapshot
  POST /tickets/{service_id}/refresh  force a WSAA login for one service
  GET  /wsfe/status                   FEDummy probe
  POST /invoices                      authorize one voucher (CAE)

AfipError subclasses map to JSON bodies carrying the ErrorCode, message
and failing step.

Entry point for production: uvicorn afip_invoicer.asgi:app --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import date
from decimal import Decimal
from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from afip_invoicer import __version__
from afip_invoicer.config import AppSettings
from afip_invoicer.domain.errors import AfipError, ErrorCode
from afip_invoicer.domain.models import (
    Buyer,
    Concept,
    DocumentType,
    InvoiceAuthorizationResult,
    InvoiceDraft,
    Tax,
    VatCondition,
    VatRate,
    VoucherType,
)
from afip_invoicer.main import Components, configure_structlog, create_components

# ─────────────────────── Global State ───────────────────────
# Set during app startup, read by the endpoints.

_components: Components | None = None
_error_message: str | None = None
log = structlog.get_logger()

_STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.AUTHENTICATION_ERROR: 401,
    ErrorCode.AUTHORIZATION_ERROR: 403,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.BUSINESS_RULE_ERROR: 409,
    ErrorCode.RATE_LIMIT_ERROR: 429,
    ErrorCode.TECHNICAL_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.CONFIGURATION_ERROR: 500,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 502,
    ErrorCode.SERVICE_UNAVAILABLE_ERROR: 503,
    ErrorCode.TIMEOUT_ERROR: 504,
    ErrorCode.UNKNOWN_ERROR: 500,
}


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: load settings, wire components, ensure schema, start the cache.
    Shutdown: stop the expired-ticket sweep.
    """
    global _components, _error_message

    try:
        settings = AppSettings()
    except Exception as e:
        _error_message = f"Configuration error: {e}"
        log.error("asgi.startup_error", error=_error_message)
        raise

    configure_structlog(settings.log_level)
    log.info(
        "asgi.startup_config",
        version=__version__,
        log_level=settings.log_level,
        production=settings.afip.production,
    )

    try:
        components = create_components(settings)
        await components.store.ensure_schema()
        await components.cache.start()
    except AfipError as e:
        _error_message = f"Failed to initialize components: {e}"
        log.error("asgi.init_error", error=_error_message)
        raise

    _components = components
    log.info("asgi.startup_complete")

    yield

    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    components.cache.stop()
    _components = None
    log.info("asgi.shutdown_complete")


# ─────────────────────── FastAPI Application ───────────────────────

app = FastAPI(
    title="afip-invoicer",
    description="AFIP WSAA ticket lifecycle and WSFEv1 CAE authorization",
    version=__version__,
    lifespan=lifespan,
)


@app.exception_handler(AfipError)
async def afip_error_handler(request: Request, exc: AfipError) -> JSONResponse:
    """Translate core errors into JSON with the error code and failing step."""
    log.warning(
        "api.request_failed",
        path=request.url.path,
        error_code=exc.code.value,
        step=exc.step,
    )
    return JSONResponse(
        status_code=_STATUS_BY_CODE.get(exc.code, 500),
        content={
            "status": "failed",
            "error_code": exc.code.value,
            "message": exc.message,
            "step": exc.step,
        },
    )


def _require_components() -> Components | JSONResponse:
    if _components is None:
        return JSONResponse(
            status_code=503,
            content={
                "status": "unavailable",
                "error_code": ErrorCode.SERVICE_UNAVAILABLE_ERROR.value,
                "reason": _error_message or "Components not initialized",
            },
        )
    return _components


# ─────────────────────── Request / response shapes ───────────────────────


class BuyerPayload(BaseModel):
    document_type: int = DocumentType.FINAL_CONSUMER
    document_number: int = 0
    vat_condition: int = VatCondition.FINAL_CONSUMER


class VatRatePayload(BaseModel):
    id: int
    base: Decimal
    amount: Decimal


class TaxPayload(BaseModel):
    id: int
    description: str
    base: Decimal
    rate: Decimal
    amount: Decimal


class InvoicePayload(BaseModel):
    """POST /invoices body; mirrors InvoiceDraft."""

    point_of_sale: int
    total: Decimal
    voucher_type: int = VoucherType.INVOICE_C
    concept: int = Concept.PRODUCTS
    buyer: BuyerPayload = Field(default_factory=BuyerPayload)
    net: Decimal | None = None
    vat: Decimal = Decimal("0")
    exempt: Decimal = Decimal("0")
    non_taxed: Decimal = Decimal("0")
    other_taxes: Decimal = Decimal("0")
    currency: str = "PES"
    exchange_rate: Decimal = Decimal("1")
    issue_date: date | None = None
    service_from: date | None = None
    service_to: date | None = None
    payment_due: date | None = None
    vat_rates: list[VatRatePayload] = Field(default_factory=list)
    taxes: list[TaxPayload] = Field(default_factory=list)

    def to_draft(self) -> InvoiceDraft:
        return InvoiceDraft(
            point_of_sale=self.point_of_sale,
            total=self.total,
            voucher_type=self.voucher_type,
            concept=self.concept,
            buyer=Buyer(**self.buyer.model_dump()),
            net=self.net,
            vat=self.vat,
            exempt=self.exempt,
            non_taxed=self.non_taxed,
            other_taxes=self.other_taxes,
            currency=self.currency,
            exchange_rate=self.exchange_rate,
            issue_date=self.issue_date,
            service_from=self.service_from,
            service_to=self.service_to,
            payment_due=self.payment_due,
            vat_rates=tuple(VatRate(**rate.model_dump()) for rate in self.vat_rates),
            taxes=tuple(Tax(**tax.model_dump()) for tax in self.taxes),
        )


def _result_to_dict(result: InvoiceAuthorizationResult) -> dict[str, Any]:
    def messages(items: tuple[Any, ...]) -> list[dict[str, Any]]:
        return [{"code": item.code, "message": item.message} for item in items]

    return {
        "success": result.success,
        "result_code": result.result_code,
        "point_of_sale": result.point_of_sale,
        "voucher_type": result.voucher_type,
        "voucher_number": result.voucher_number,
        "cae": result.cae,
        "cae_expiration": result.cae_expiration.isoformat() if result.cae_expiration else None,
        "processed_at": result.processed_at.isoformat() if result.processed_at else None,
        "detail_result_code": result.detail_result_code,
        "errors": messages(result.errors),
        "observations": messages(result.observations),
        "events": messages(result.events),
    }


# ─────────────────────── Endpoints ───────────────────────


@app.get("/health")
async def health() -> JSONResponse:
    """
    Liveness probe.

    Returns 503 if startup failed or components are not wired yet.
    """
    if _error_message:
        log.warning("health.check_failed", error=_error_message)
        return JSONResponse(status_code=503, content={"status": "unhealthy", "error": _error_message})
    if _components is None:
        return JSONResponse(status_code=503, content={"status": "starting"})
    return JSONResponse(
        status_code=200,
        content={"status": "healthy", "sweep_running": _components.cache.status()["sweep_running"]},
    )


@app.get("/info")
async def info() -> dict[str, Any]:
    """Application metadata, used for debugging and monitoring."""
    payload: dict[str, Any] = {
        "name": "afip-invoicer",
        "version": __version__,
        "initialized": _components is not None,
        "has_error": _error_message is not None,
    }
    if _components is not None:
        afip = _components.settings.afip
        payload |= {
            "production": afip.production,
            "cuit": afip.cuit,
            "invoicing_service_id": afip.invoicing_service_id,
            "wsaa_url": afip.get_wsaa_url(),
            "wsfe_url": afip.get_wsfe_url(),
        }
    return payload


@app.get("/tickets", response_model=None)
async def tickets() -> dict[str, Any] | JSONResponse:
    """Snapshot of cached tickets (never the token or sign themselves)."""
    components = _require_components()
    if isinstance(components, JSONResponse):
        return components
    return components.cache.status()


@app.post("/tickets/{service_id}/refresh", response_model=None)
async def refresh_ticket(service_id: str) -> dict[str, Any] | JSONResponse:
    """Force a WSAA login for `service_id` and report the new expiration."""
    components = _require_components()
    if isinstance(components, JSONResponse):
        return components
    log.info("tickets.manual_refresh", service_id=service_id, source="REST")
    ticket = await components.cache.refresh(service_id, force=True)
    return {
        "service_id": ticket.service_id,
        "issued_at": ticket.issued_at.isoformat(),
        "expires_at": ticket.expires_at.isoformat(),
    }


@app.get("/wsfe/status", response_model=None)
async def wsfe_status() -> dict[str, Any] | JSONResponse:
    """FEDummy: state of the WSFEv1 application, database and auth servers."""
    components = _require_components()
    if isinstance(components, JSONResponse):
        return components
    status = await components.orchestrator.check_connection()
    return {
        "ok": status.is_ok,
        "app_server": status.app_server,
        "db_server": status.db_server,
        "auth_server": status.auth_server,
    }


@app.post("/invoices", response_model=None)
async def create_invoice(payload: InvoicePayload) -> JSONResponse:
    """
    Authorize one voucher.

    Returns 200 with the CAE when approved, 422 with AFIP's errors and
    observations when rejected. Rejections are final; resubmitting is a
    new request.
    """
    components = _require_components()
    if isinstance(components, JSONResponse):
        return components
    result = await components.orchestrator.authorize(payload.to_draft())
    return JSONResponse(status_code=200 if result.success else 422, content=_result_to_dict(result))


if __name__ == "__main__":
    # For local testing: python -m uvicorn afip_invoicer.asgi:app --reload
    import uvicorn

    uvicorn.run(
        "afip_invoicer.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
