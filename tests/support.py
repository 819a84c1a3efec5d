"""
Test support — certificates, canned AFIP SOAP responses and in-memory fakes.

Imported by conftest.py files and by tests that need to build responses
with specific values. Nothing here talks to the network or a database.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from xml.sax.saxutils import escape

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from afip_invoicer.domain.errors import StorageError
from afip_invoicer.domain.models import RemoteMessage, SecurityTicket

WSAA_URL = "https://wsaahomo.afip.gov.ar/ws/services/LoginCms"
WSFE_URL = "https://wswhomo.afip.gov.ar/wsfev1/service.asmx"
CUIT = 20123456789
P12_PASSWORD = "test-password"

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)

ALREADY_AUTHENTICATED_CODE = "ns1:coe.alreadyAuthenticated"
ALREADY_AUTHENTICATED_MESSAGE = (
    "El CEE ya posee un TA valido para el acceso al WSN solicitado"
)


# ─────────────────────── Clock ───────────────────────


class MutableClock:
    """Callable clock whose current time tests move explicitly."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, delta: timedelta) -> None:
        self.now = self.now + delta


# ─────────────────────── Certificates ───────────────────────


@dataclass(frozen=True)
class CertificateFiles:
    p12_path: Path
    password: str
    cert_pem_path: Path
    key_pem_path: Path
    certificate: x509.Certificate


def create_certificate_files(directory: Path, password: str = P12_PASSWORD) -> CertificateFiles:
    """Generate a self-signed RSA certificate as PKCS#12 and as a PEM pair."""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    name = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "afip-invoicer-test"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, f"CUIT {CUIT}"),
        ]
    )
    now = datetime.now(UTC)
    certificate = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - timedelta(days=1))
        .not_valid_after(now + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )

    p12_path = directory / "certificate.p12"
    p12_path.write_bytes(
        pkcs12.serialize_key_and_certificates(
            b"afip-invoicer-test",
            key,
            certificate,
            None,
            serialization.BestAvailableEncryption(password.encode("utf-8")),
        )
    )
    cert_pem_path = directory / "certificate.crt"
    cert_pem_path.write_bytes(certificate.public_bytes(serialization.Encoding.PEM))
    key_pem_path = directory / "private.key"
    key_pem_path.write_bytes(
        key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )
    )
    return CertificateFiles(p12_path, password, cert_pem_path, key_pem_path, certificate)


# ─────────────────────── Tickets ───────────────────────


def make_ticket(
    service_id: str = "wsfe",
    issued_at: datetime = T0,
    lifetime: timedelta = timedelta(hours=12),
    token: str = "TOKEN-1",
    sign: str = "SIGN-1",
) -> SecurityTicket:
    return SecurityTicket(
        service_id=service_id,
        token=token,
        sign=sign,
        issued_at=issued_at,
        expires_at=issued_at + lifetime,
        raw_response="<loginTicketResponse/>",
    )


# ─────────────────────── WSAA responses ───────────────────────

_SOAP_OPEN = (
    '<?xml version="1.0" encoding="utf-8"?>'
    '<soapenv:Envelope xmlns:soapenv="http://schemas.xmlsoap.org/soap/envelope/" '
    'xmlns:xsd="http://www.w3.org/2001/XMLSchema" '
    'xmlns:xsi="http://www.w3.org/2001/XMLSchema-instance">'
    "<soapenv:Body>"
)
_SOAP_CLOSE = "</soapenv:Body></soapenv:Envelope>"


def login_ticket_response(
    token: str = "TOKEN-1",
    sign: str = "SIGN-1",
    generation_time: str = "2026-03-02T09:00:00.000-03:00",
    expiration_time: str = "2026-03-02T21:00:00.000-03:00",
) -> str:
    """The loginTicketResponse document WSAA embeds in loginCmsReturn."""
    return (
        '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>'
        '<loginTicketResponse version="1.0"><header>'
        "<source>CN=wsaahomo, O=AFIP, C=AR, SERIALNUMBER=CUIT 33693450239</source>"
        f"<destination>SERIALNUMBER=CUIT {CUIT}, CN=afip-invoicer-test</destination>"
        "<uniqueId>2834919341</uniqueId>"
        f"<generationTime>{generation_time}</generationTime>"
        f"<expirationTime>{expiration_time}</expirationTime>"
        "</header><credentials>"
        f"<token>{token}</token><sign>{sign}</sign>"
        "</credentials></loginTicketResponse>"
    )


def wsaa_login_response(ticket_xml: str | None = None, **kwargs: str) -> str:
    ticket_xml = ticket_xml if ticket_xml is not None else login_ticket_response(**kwargs)
    return (
        _SOAP_OPEN
        + '<loginCmsResponse xmlns="http://wsaa.view.sua.dvadac.desein.afip.gov">'
        + f"<loginCmsReturn>{escape(ticket_xml)}</loginCmsReturn>"
        + "</loginCmsResponse>"
        + _SOAP_CLOSE
    )


def soap_fault(
    code: str = ALREADY_AUTHENTICATED_CODE,
    message: str = ALREADY_AUTHENTICATED_MESSAGE,
    exception_name: str = "gov.afip.desein.dvadac.sua.view.wsaa.LoginFault",
    hostname: str = "wsaaext1.homo.afip.gov.ar",
) -> str:
    return (
        _SOAP_OPEN
        + "<soapenv:Fault>"
        + f'<faultcode xmlns:ns1="http://wsaa.view.sua.dvadac.desein.afip.gov">{code}</faultcode>'
        + f"<faultstring>{escape(message)}</faultstring>"
        + "<detail>"
        + f'<ns2:exceptionName xmlns:ns2="http://xml.apache.org/axis/">{exception_name}</ns2:exceptionName>'
        + f'<ns3:hostname xmlns:ns3="http://xml.apache.org/axis/">{hostname}</ns3:hostname>'
        + "</detail>"
        + "</soapenv:Fault>"
        + _SOAP_CLOSE
    )


# ─────────────────────── WSFEv1 responses ───────────────────────


def _messages(wrapper: str, item: str, messages: tuple[RemoteMessage, ...]) -> str:
    if not messages:
        return ""
    inner = "".join(
        f"<{item}><Code>{m.code}</Code><Msg>{escape(m.message)}</Msg></{item}>" for m in messages
    )
    return f"<{wrapper}>{inner}</{wrapper}>"


def _wsfe(operation: str, result_inner: str) -> str:
    return (
        _SOAP_OPEN
        + f'<{operation}Response xmlns="http://ar.gov.afip.dif.FEV1/">'
        + f"<{operation}Result>{result_inner}</{operation}Result>"
        + f"</{operation}Response>"
        + _SOAP_CLOSE
    )


def wsfe_last_voucher_response(
    number: int = 41,
    point_of_sale: int = 1,
    voucher_type: int = 11,
    errors: tuple[RemoteMessage, ...] = (),
) -> str:
    return _wsfe(
        "FECompUltimoAutorizado",
        f"<PtoVta>{point_of_sale}</PtoVta><CbteTipo>{voucher_type}</CbteTipo>"
        f"<CbteNro>{number}</CbteNro>" + _messages("Errors", "Err", errors),
    )


def wsfe_cae_response(
    result: str = "A",
    number: int = 42,
    cae: str = "76093412345678",
    cae_expiration: str = "20260312",
    point_of_sale: int = 1,
    voucher_type: int = 11,
    process_time: str = "20260302093012",
    observations: tuple[RemoteMessage, ...] = (),
    errors: tuple[RemoteMessage, ...] = (),
    events: tuple[RemoteMessage, ...] = (),
) -> str:
    header = (
        f"<FeCabResp><Cuit>{CUIT}</Cuit><PtoVta>{point_of_sale}</PtoVta>"
        f"<CbteTipo>{voucher_type}</CbteTipo><FchProceso>{process_time}</FchProceso>"
        f"<CantReg>1</CantReg><Resultado>{result}</Resultado><Reproceso>N</Reproceso></FeCabResp>"
    )
    detail = (
        "<FeDetResp><FECAEDetResponse>"
        f"<Concepto>1</Concepto><DocTipo>99</DocTipo><DocNro>0</DocNro>"
        f"<CbteDesde>{number}</CbteDesde><CbteHasta>{number}</CbteHasta>"
        f"<CbteFch>20260302</CbteFch><Resultado>{result}</Resultado>"
        + _messages("Observaciones", "Obs", observations)
        + f"<CAE>{cae if result == 'A' else ''}</CAE>"
        + f"<CAEFchVto>{cae_expiration if result == 'A' else ''}</CAEFchVto>"
        + "</FECAEDetResponse></FeDetResp>"
    )
    return _wsfe(
        "FECAESolicitar",
        header + detail + _messages("Events", "Evt", events) + _messages("Errors", "Err", errors),
    )


def wsfe_dummy_response(app: str = "OK", db: str = "OK", auth: str = "OK") -> str:
    return _wsfe(
        "FEDummy", f"<AppServer>{app}</AppServer><DbServer>{db}</DbServer><AuthServer>{auth}</AuthServer>"
    )


def wsfe_catalog_response(
    operation: str,
    item_tag: str,
    items: list[tuple[int, str]],
    errors: tuple[RemoteMessage, ...] = (),
) -> str:
    rows = "".join(
        f"<{item_tag}><Id>{item_id}</Id><Desc>{escape(desc)}</Desc>"
        f"<FchDesde>20100917</FchDesde><FchHasta>NULL</FchHasta></{item_tag}>"
        for item_id, desc in items
    )
    return _wsfe(operation, f"<ResultGet>{rows}</ResultGet>" + _messages("Errors", "Err", errors))


# ─────────────────────── Fakes ───────────────────────


class InMemoryTicketStore:
    """TicketStore fake with switchable save failures."""

    def __init__(self, clock: MutableClock | None = None) -> None:
        self.clock = clock or MutableClock()
        self.tickets: dict[str, SecurityTicket] = {}
        self.saved: list[SecurityTicket] = []
        self.fail_on_save = False
        self.reads = 0

    async def save(self, ticket: SecurityTicket) -> None:
        if self.fail_on_save:
            raise StorageError("database unavailable")
        self.tickets[ticket.service_id] = ticket
        self.saved.append(ticket)

    async def get_valid(self, service_id: str) -> SecurityTicket | None:
        self.reads += 1
        ticket = self.tickets.get(service_id)
        if ticket is None or ticket.is_expired(self.clock()):
            return None
        return ticket

    async def get_all_valid(self) -> list[SecurityTicket]:
        return [t for t in self.tickets.values() if not t.is_expired(self.clock())]

    async def delete(self, service_id: str) -> None:
        self.tickets.pop(service_id, None)

    async def delete_expired(self) -> int:
        expired = [sid for sid, t in self.tickets.items() if t.is_expired(self.clock())]
        for sid in expired:
            del self.tickets[sid]
        return len(expired)


class ScriptedTicketClient:
    """
    TicketServiceClient fake returning (or raising) scripted outcomes in order.

    The last outcome repeats once the script runs out. `delay` makes each
    login yield to the event loop so concurrent callers can pile up.
    """

    def __init__(self, *outcomes: SecurityTicket | Exception, delay: float = 0.0) -> None:
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls: list[str] = []

    async def login(self, service_id: str) -> SecurityTicket:
        self.calls.append(service_id)
        await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(len(self.calls), len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


@dataclass
class RecordingListener:
    obtained: list[SecurityTicket] = field(default_factory=list)
    expired: list[SecurityTicket] = field(default_factory=list)
    errors: list[tuple[str, Exception]] = field(default_factory=list)

    def on_ticket_obtained(self, ticket: SecurityTicket) -> None:
        self.obtained.append(ticket)

    def on_ticket_expired(self, ticket: SecurityTicket) -> None:
        self.expired.append(ticket)

    def on_ticket_error(self, service_id: str, error: Exception) -> None:
        self.errors.append((service_id, error))
