"""
WSAA adapter — LoginCms ticket acquisition.

Adapter layer — implements the TicketServiceClient port on top of the
shared SoapTransport.

Flow:
  1. TicketSigner.build_request(service_id) → loginTicketRequest XML
  2. TicketSigner.sign(xml)                → base64 CMS
  3. POST loginCms(in0=cms) to the environment's WSAA endpoint
  4. loginCmsReturn text is itself an XML document (loginTicketResponse):
       header/generationTime, header/expirationTime,
       credentials/token, credentials/sign
  5. → SecurityTicket (expiration normalized to UTC)

No caching here: every call asks WSAA for a new ticket. WSAA refuses a new
ticket while one is still valid for the same certificate and service; that
fault is surfaced as RemoteFaultError and recovered by TicketCache.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta

import structlog
from lxml import etree

from afip_invoicer.adapters.soap import (
    SoapTransport,
    add,
    find_text,
    new_envelope,
    parse_xml,
    require_text,
    serialize,
)
from afip_invoicer.adapters.ticket_signer import DEFAULT_VALIDITY
from afip_invoicer.domain.errors import ParseError, ValidationError
from afip_invoicer.domain.models import SecurityTicket
from afip_invoicer.domain.ports import TicketSigner

log = structlog.get_logger()

WSAA_NS = "http://wsaa.view.sua.dvadac.desein.afip.gov"
WSAA_PRODUCTION_URL = "https://wsaa.afip.gov.ar/ws/services/LoginCms"
WSAA_SANDBOX_URL = "https://wsaahomo.afip.gov.ar/ws/services/LoginCms"


def wsaa_url(production: bool) -> str:
    return WSAA_PRODUCTION_URL if production else WSAA_SANDBOX_URL


def _parse_timestamp(value: str, raw: str) -> datetime:
    """ISO-8601 with offset → aware UTC datetime. Naive values are taken as UTC."""
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as e:
        raise ParseError(f"Invalid ticket timestamp {value!r}", raw_response=raw) from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def build_login_envelope(cms_b64: str) -> bytes:
    envelope, operation = new_envelope(WSAA_NS, "loginCms")
    add(operation, "in0", cms_b64)
    return serialize(envelope)


def parse_login_response(body: etree._Element, service_id: str) -> SecurityTicket:
    """
    Extract the SecurityTicket from a loginCms response Body.

    Raises ParseError when loginCmsReturn is missing, its embedded document
    is malformed, or any of the four required fields is absent.
    """
    ticket_xml = find_text(body, "loginCmsResponse/loginCmsReturn")
    if not ticket_xml:
        raise ParseError(
            "WSAA response has no loginCmsReturn",
            raw_response=etree.tostring(body, encoding="unicode"),
        )

    ticket_doc = parse_xml(ticket_xml, "loginTicketResponse")
    token = require_text(ticket_doc, "credentials/token", ticket_xml)
    sign = require_text(ticket_doc, "credentials/sign", ticket_xml)
    issued_at = _parse_timestamp(require_text(ticket_doc, "header/generationTime", ticket_xml), ticket_xml)
    expires_at = _parse_timestamp(require_text(ticket_doc, "header/expirationTime", ticket_xml), ticket_xml)

    try:
        return SecurityTicket(
            service_id=service_id,
            token=token,
            sign=sign,
            issued_at=issued_at,
            expires_at=expires_at,
            raw_response=ticket_xml,
        )
    except ValidationError as e:
        raise ParseError(f"WSAA returned an unusable ticket: {e.message}", raw_response=ticket_xml) from e


class WsaaTicketClient:
    """
    Obtain security tickets from WSAA LoginCms.

    Implements the TicketServiceClient port.
    """

    def __init__(
        self,
        signer: TicketSigner,
        transport: SoapTransport,
        validity: timedelta = DEFAULT_VALIDITY,
    ) -> None:
        self._signer = signer
        self._transport = transport
        self._validity = validity

    async def login(self, service_id: str) -> SecurityTicket:
        """Sign a fresh login request for `service_id` and exchange it for a ticket."""
        # Certificate loading and RSA signing are blocking.
        request_xml = await asyncio.to_thread(self._signer.build_request, service_id, self._validity)
        cms_b64 = await asyncio.to_thread(self._signer.sign, request_xml)

        log.info("wsaa.login_requested", service_id=service_id, url=self._transport.url)
        body = await self._transport.call("loginCms", build_login_envelope(cms_b64))

        try:
            ticket = parse_login_response(body, service_id)
        except ParseError as e:
            log.error("wsaa.response_invalid", service_id=service_id, error=e.message)
            self._transport.dump_invalid("loginCms", e.raw_response or b"")
            raise

        log.info(
            "wsaa.login_succeeded",
            service_id=service_id,
            issued_at=ticket.issued_at.isoformat(),
            expires_at=ticket.expires_at.isoformat(),
            token_length=len(ticket.token),
            sign_length=len(ticket.sign),
        )
        return ticket
