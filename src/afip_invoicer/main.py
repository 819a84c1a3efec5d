"""
Application entry point — wires dependencies and starts the ASGI server.

Composition root: creates concrete adapters, injects them into the ticket
cache and the orchestrator, and hands them to the web application.

This is the ONLY place where concrete classes are instantiated.
Everything else depends on Protocol interfaces.

Responsibilities:
  1. Configure structlog for structured logging
  2. Load and validate configuration from environment
  3. Create concrete adapters (signer, SOAP transports, WSAA/WSFEv1 clients, store)
  4. Wire the ticket cache and the invoice orchestrator
  5. Serve afip_invoicer.asgi:app with uvicorn
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import timedelta

import structlog

from afip_invoicer import __version__
from afip_invoicer.adapters.soap import SoapTransport
from afip_invoicer.adapters.ticket_repository import PsycopgTicketStore
from afip_invoicer.adapters.ticket_signer import CmsTicketSigner
from afip_invoicer.adapters.wsaa_client import WsaaTicketClient
from afip_invoicer.adapters.wsfe_client import WsfeClient
from afip_invoicer.config import AppSettings
from afip_invoicer.domain.errors import WSAA_SERVICE
from afip_invoicer.domain.ports import TicketListener
from afip_invoicer.orchestrator import InvoiceOrchestrator
from afip_invoicer.ticket_cache import TicketCache


def configure_structlog(log_level: str = "INFO") -> None:
    """
    Configure structlog for structured logging.

    ISO timestamps, level filtering, console rendering to stdout.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@dataclass(frozen=True, slots=True)
class Components:
    """Everything the web application needs, wired once at startup."""

    settings: AppSettings
    store: PsycopgTicketStore
    cache: TicketCache
    wsfe: WsfeClient
    orchestrator: InvoiceOrchestrator


def create_components(
    settings: AppSettings,
    listeners: Sequence[TicketListener] = (),
) -> Components:
    """Instantiate all concrete adapters from application settings."""
    afip = settings.afip
    signer = CmsTicketSigner(
        certificate_path=afip.certificate_path,
        password=afip.get_password(),
        private_key_path=afip.private_key_path,
    )
    wsaa = WsaaTicketClient(
        signer=signer,
        transport=SoapTransport(
            WSAA_SERVICE,
            afip.get_wsaa_url(),
            timeout=settings.http_timeout_seconds,
            diagnostics_dir=settings.diagnostics_dir,
        ),
        validity=timedelta(minutes=afip.ticket_validity_minutes),
    )
    wsfe = WsfeClient(
        SoapTransport(
            "wsfe",
            afip.get_wsfe_url(),
            timeout=settings.http_timeout_seconds,
            diagnostics_dir=settings.diagnostics_dir,
        )
    )
    store = PsycopgTicketStore(dsn=settings.database.get_dsn())
    cache = TicketCache(
        client=wsaa,
        store=store,
        listeners=listeners,
        already_authenticated_backoff=settings.cache.already_authenticated_backoff_seconds,
        sweep_interval_minutes=settings.cache.sweep_interval_minutes,
    )
    orchestrator = InvoiceOrchestrator(
        tickets=cache,
        authorizer=wsfe,
        cuit=afip.cuit,
        service_id=afip.invoicing_service_id,
    )
    return Components(
        settings=settings,
        store=store,
        cache=cache,
        wsfe=wsfe,
        orchestrator=orchestrator,
    )


def main() -> None:
    """Validate configuration and serve the ASGI application."""
    try:
        settings = AppSettings()
    except Exception as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version=__version__,
        log_level=settings.log_level,
        production=settings.afip.production,
        cuit=settings.afip.cuit,
    )

    import uvicorn

    uvicorn.run(
        "afip_invoicer.asgi:app",
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
