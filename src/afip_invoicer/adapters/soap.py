"""
SOAP transport — shared envelope building, HTTP exchange and fault mapping.

Adapter layer — used by both the WSAA and WSFEv1 clients so that transport,
parse and fault errors are classified identically:

  httpx timeout / connect / protocol error      → TransportError
  body not well-formed XML, no Body element     → ParseError (raw kept)
  <Fault> present (any HTTP status, WSAA uses 500) → RemoteFaultError
  HTTP status >= 400 without a fault            → TransportError

SOAP 1.1 only; both AFIP services accept it. Each call opens its own
httpx.AsyncClient with the configured timeout, so no connection state
is shared between requests.
"""

from __future__ import annotations

import time
from datetime import UTC, datetime
from pathlib import Path

import httpx
import structlog
from lxml import etree

from afip_invoicer.domain.errors import ParseError, RemoteFaultError, TransportError

log = structlog.get_logger()

SOAP_ENV_NS = "http://schemas.xmlsoap.org/soap/envelope/"

# Entity expansion and network access are never needed for AFIP responses.
_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=True)


# ─────────────────────── Envelope building ───────────────────────


def new_envelope(operation_ns: str, operation: str) -> tuple[etree._Element, etree._Element]:
    """Create an Envelope/Body/<operation> skeleton and return (envelope, operation element)."""
    envelope = etree.Element(
        f"{{{SOAP_ENV_NS}}}Envelope", nsmap={"soap": SOAP_ENV_NS, "ns": operation_ns}
    )
    etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Header")
    body = etree.SubElement(envelope, f"{{{SOAP_ENV_NS}}}Body")
    return envelope, etree.SubElement(body, f"{{{operation_ns}}}{operation}")


def add(parent: etree._Element, tag: str, text: object | None = None) -> etree._Element:
    """Append a child in the parent's namespace, with optional text."""
    namespace = etree.QName(parent).namespace
    element = etree.SubElement(parent, f"{{{namespace}}}{tag}" if namespace else tag)
    if text is not None:
        element.text = str(text)
    return element


def serialize(envelope: etree._Element) -> bytes:
    return etree.tostring(envelope, xml_declaration=True, encoding="UTF-8")


def parse_xml(raw: str | bytes, what: str) -> etree._Element:
    """Parse an XML document, raising ParseError (with the raw text) when it is malformed."""
    data = raw.encode("utf-8") if isinstance(raw, str) else raw
    try:
        return etree.fromstring(data, _PARSER)
    except etree.XMLSyntaxError as e:
        raise ParseError(f"{what} is not well-formed XML: {e}", raw_response=raw) from e


def find_text(element: etree._Element, path: str) -> str | None:
    """Namespace-agnostic findtext: `a/b` matches a/b in any (or no) namespace."""
    wildcard = "/".join(f"{{*}}{step}" for step in path.split("/"))
    value = element.findtext(wildcard)
    return value.strip() if value is not None else None


def find_all(element: etree._Element, path: str) -> list[etree._Element]:
    wildcard = "/".join(f"{{*}}{step}" for step in path.split("/"))
    return element.findall(wildcard)


def find(element: etree._Element, path: str) -> etree._Element | None:
    wildcard = "/".join(f"{{*}}{step}" for step in path.split("/"))
    return element.find(wildcard)


def require_text(element: etree._Element, path: str, raw: str | bytes | None = None) -> str:
    value = find_text(element, path)
    if not value:
        raise ParseError(f"Response is missing required element {path}", raw_response=raw)
    return value


# ─────────────────────── Transport ───────────────────────


class SoapTransport:
    """
    POST SOAP envelopes to one endpoint and return the parsed Body.

    `service` names the remote system in errors and logs ("wsaa", "wsfe").
    When `diagnostics_dir` is set, unparseable responses are also written
    there for later inspection.
    """

    def __init__(
        self,
        service: str,
        url: str,
        timeout: float = 60,
        diagnostics_dir: Path | None = None,
    ) -> None:
        self.service = service
        self.url = url
        self._timeout = timeout
        self._diagnostics_dir = diagnostics_dir

    async def call(self, operation: str, envelope: bytes, soap_action: str = "") -> etree._Element:
        """Send `envelope` and return the response Body element."""
        started = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(
                    self.url,
                    content=envelope,
                    headers={
                        "Content-Type": "text/xml; charset=utf-8",
                        "SOAPAction": f'"{soap_action}"',
                    },
                )
        except httpx.TimeoutException as e:
            log.error("soap.timeout", service=self.service, operation=operation, url=self.url)
            raise TransportError(
                f"{self.service} {operation} timed out after {self._timeout}s",
                service=self.service,
                operation=operation,
            ) from e
        except httpx.HTTPError as e:
            log.error(
                "soap.transport_error",
                service=self.service,
                operation=operation,
                url=self.url,
                error=str(e),
            )
            raise TransportError(
                f"{self.service} {operation} failed: {e}",
                service=self.service,
                operation=operation,
            ) from e

        log.debug(
            "soap.response",
            service=self.service,
            operation=operation,
            status_code=response.status_code,
            elapsed_ms=round((time.perf_counter() - started) * 1000),
            size_bytes=len(response.content),
        )

        try:
            root = parse_xml(response.content, f"{self.service} {operation} response")
        except ParseError:
            self._dump(operation, response.content)
            if response.status_code >= 400:
                raise TransportError(
                    f"{self.service} {operation} returned HTTP {response.status_code}",
                    service=self.service,
                    operation=operation,
                    status_code=response.status_code,
                ) from None
            raise

        fault = find(root, "Body/Fault")
        if fault is not None:
            error = RemoteFaultError(
                code=find_text(fault, "faultcode") or "",
                message=find_text(fault, "faultstring") or "",
                exception_name=find_text(fault, "detail/exceptionName"),
                hostname=find_text(fault, "detail/hostname"),
                service=self.service,
            )
            log.warning(
                "soap.fault",
                service=self.service,
                operation=operation,
                fault_code=error.fault_code,
                fault_message=error.fault_message,
                status_code=response.status_code,
            )
            raise error

        if response.status_code >= 400:
            raise TransportError(
                f"{self.service} {operation} returned HTTP {response.status_code}",
                service=self.service,
                operation=operation,
                status_code=response.status_code,
            )

        body = find(root, "Body")
        if body is None:
            self._dump(operation, response.content)
            raise ParseError(
                f"{self.service} {operation} response has no SOAP Body",
                raw_response=response.content,
            )
        return body

    def dump_invalid(self, operation: str, raw: str | bytes) -> None:
        """Write a response that failed higher-level parsing to the diagnostics directory."""
        self._dump(operation, raw)

    def _dump(self, operation: str, raw: str | bytes) -> None:
        if self._diagnostics_dir is None:
            return
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S%f")
        path = self._diagnostics_dir / f"{self.service}_{operation}_{stamp}.xml"
        try:
            self._diagnostics_dir.mkdir(parents=True, exist_ok=True)
            path.write_bytes(raw.encode("utf-8") if isinstance(raw, str) else raw)
        except OSError as e:
            log.warning("soap.diagnostics_write_failed", path=str(path), error=str(e))
            return
        log.info("soap.diagnostics_written", path=str(path))
