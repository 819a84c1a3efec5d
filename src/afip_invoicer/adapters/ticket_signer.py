"""
CMS ticket signer adapter — login ticket request XML + PKCS#7 signature.

Adapter layer — implements the TicketSigner port using:
  - lxml: compact loginTicketRequest document (no pretty printing, WSAA
    rejects signatures over reformatted content)
  - cryptography (PyCA): PKCS#12 / PEM loading and CMS SignedData creation
  - asn1crypto: CMS unwrapping for self-verification (signed attributes,
    message digest, signer certificate lookup by issuer + serial)

Pipeline:
  service id
    → lxml: <loginTicketRequest version="1.0"> header + service
    → cryptography: PKCS7SignatureBuilder (SHA-256, attached, end-entity cert only)
    → asn1crypto: re-open the SignedData and verify it before it leaves the process
    → base64 text sent as loginCms/in0

Key design decision: a signature that does not verify locally is never sent,
so a corrupt certificate bundle surfaces as SigningError instead of an
opaque WSAA fault.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog
from asn1crypto import cms
from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa
from cryptography.hazmat.primitives.serialization import pkcs7, pkcs12
from lxml import etree

from afip_invoicer.domain.errors import SigningError, ValidationError
from afip_invoicer.domain.models import AFIP_TZ

log = structlog.get_logger()

DEFAULT_VALIDITY = timedelta(minutes=20)
MAX_SERVICE_ID_LENGTH = 35

_DIGESTS: dict[str, Callable[[], hashes.HashAlgorithm]] = {
    "sha1": hashes.SHA1,
    "sha256": hashes.SHA256,
    "sha384": hashes.SHA384,
    "sha512": hashes.SHA512,
}


def _utcnow() -> datetime:
    return datetime.now(UTC)


# ─────────────────────── Key material ───────────────────────


def _load_pkcs12(path: Path, password: str | None) -> tuple[Any, x509.Certificate]:
    """Load the private key and end-entity certificate from a .p12/.pfx bundle."""
    secret = password.encode("utf-8") if password else None
    key, certificate, _additional = pkcs12.load_key_and_certificates(path.read_bytes(), secret)
    if key is None or certificate is None:
        raise SigningError(f"PKCS#12 bundle {path.name} lacks a private key or certificate")
    return key, certificate


def _load_pem_pair(
    certificate_path: Path, key_path: Path, password: str | None
) -> tuple[Any, x509.Certificate]:
    """Load a PEM certificate and its PEM private key (the openssl-generated CSR pair)."""
    certificate = x509.load_pem_x509_certificate(certificate_path.read_bytes())
    secret = password.encode("utf-8") if password else None
    key = serialization.load_pem_private_key(key_path.read_bytes(), secret)
    return key, certificate


# ─────────────────────── Signer ───────────────────────


class CmsTicketSigner:
    """
    Build and sign WSAA login ticket requests.

    Implements the TicketSigner port. Key material is read on first use and
    kept for the lifetime of the signer.
    """

    def __init__(
        self,
        certificate_path: Path,
        password: str | None = None,
        private_key_path: Path | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._certificate_path = Path(certificate_path)
        self._password = password
        self._private_key_path = Path(private_key_path) if private_key_path else None
        self._clock = clock
        self._material: tuple[Any, x509.Certificate] | None = None

    def build_request(self, service_id: str, validity: timedelta = DEFAULT_VALIDITY) -> str:
        """
        Build the compact loginTicketRequest XML for `service_id`.

        uniqueId is the generation instant in epoch seconds, which always fits
        the unsignedInt the WSAA schema declares.
        """
        service_id = (service_id or "").strip()
        if not service_id:
            raise ValidationError("Service id is required")
        if len(service_id) > MAX_SERVICE_ID_LENGTH:
            raise ValidationError(
                f"Service id is {len(service_id)} characters long, "
                f"the maximum is {MAX_SERVICE_ID_LENGTH}"
            )

        generation = self._clock().astimezone(AFIP_TZ).replace(microsecond=0)
        expiration = generation + validity
        if expiration <= generation:
            raise ValidationError(
                f"Ticket request expiration {expiration.isoformat()} is not after "
                f"generation {generation.isoformat()}"
            )

        root = etree.Element("loginTicketRequest", version="1.0")
        header = etree.SubElement(root, "header")
        etree.SubElement(header, "uniqueId").text = str(int(generation.timestamp()))
        etree.SubElement(header, "generationTime").text = generation.isoformat()
        etree.SubElement(header, "expirationTime").text = expiration.isoformat()
        etree.SubElement(root, "service").text = service_id

        request_xml: str = etree.tostring(
            root, xml_declaration=True, encoding="UTF-8", pretty_print=False
        ).decode("utf-8")
        log.debug(
            "ticket_request.built",
            service_id=service_id,
            generation_time=generation.isoformat(),
            expiration_time=expiration.isoformat(),
        )
        return request_xml

    def sign(self, request_xml: str) -> str:
        """
        Sign `request_xml` into a base64 CMS SignedData with encapsulated content.

        The signature is verified locally before being returned.
        """
        key, certificate = self._key_material()
        content = request_xml.encode("utf-8")
        try:
            der = (
                pkcs7.PKCS7SignatureBuilder()
                .set_data(content)
                .add_signer(certificate, key, hashes.SHA256())
                .sign(serialization.Encoding.DER, [pkcs7.PKCS7Options.Binary])
            )
        except (TypeError, ValueError) as e:
            raise SigningError(f"CMS signing failed: {e}") from e

        signed = base64.b64encode(der).decode("ascii")
        self.verify(signed, expected_content=content)
        log.info("ticket_request.signed", cms_bytes=len(der), subject=certificate.subject.rfc4514_string())
        return signed

    def verify(self, cms_b64: str, expected_content: bytes | None = None) -> bytes:
        """
        Check a base64 CMS SignedData and return its encapsulated content.

        Verifies, in order: the content is present (and equals
        `expected_content` when given), the message-digest signed attribute
        matches the content, and the signer signature validates against the
        embedded certificate matching the signer's issuer and serial.
        """
        try:
            der = base64.b64decode(cms_b64, validate=True)
            content_info = cms.ContentInfo.load(der)
            if content_info["content_type"].native != "signed_data":
                raise SigningError("CMS content is not SignedData")
            signed_data = content_info["content"]
            content = signed_data["encap_content_info"]["content"].native
            signer_info = signed_data["signer_infos"][0]
            signed_attrs = signer_info["signed_attrs"]
            digest_name = signer_info["digest_algorithm"]["algorithm"].native
            signature = signer_info["signature"].native
            signer_certificate = self._find_signer_certificate(signed_data, signer_info)
            message_digest = next(
                (
                    attr["values"][0].native
                    for attr in signed_attrs
                    if attr["type"].native == "message_digest"
                ),
                None,
            )
            # Signed attributes are signed as a SET OF, not as the [0] IMPLICIT tag.
            signed_bytes = b"\x31" + signed_attrs.dump()[1:]
        except SigningError:
            raise
        except (binascii.Error, ValueError, TypeError, KeyError, IndexError) as e:
            raise SigningError(f"CMS structure could not be decoded: {e}") from e

        if content is None:
            raise SigningError("CMS SignedData carries no encapsulated content")
        if expected_content is not None and content != expected_content:
            raise SigningError("CMS content does not match the signed request")
        if digest_name not in _DIGESTS:
            raise SigningError(f"Unsupported CMS digest algorithm: {digest_name}")
        if message_digest is None:
            raise SigningError("CMS signer info lacks a message-digest attribute")

        algorithm = _DIGESTS[digest_name]()
        hasher = hashes.Hash(algorithm)
        hasher.update(content)
        if hasher.finalize() != message_digest:
            raise SigningError("CMS message digest does not match the content")

        public_key = signer_certificate.public_key()
        try:
            if isinstance(public_key, rsa.RSAPublicKey):
                public_key.verify(signature, signed_bytes, padding.PKCS1v15(), algorithm)
            elif isinstance(public_key, ec.EllipticCurvePublicKey):
                public_key.verify(signature, signed_bytes, ec.ECDSA(algorithm))
            else:
                raise SigningError(f"Unsupported signer key type: {type(public_key).__name__}")
        except InvalidSignature as e:
            raise SigningError("CMS signature verification failed") from e

        return bytes(content)

    # ─────────────────────── internals ───────────────────────

    def _key_material(self) -> tuple[Any, x509.Certificate]:
        if self._material is not None:
            return self._material
        try:
            if self._private_key_path is not None:
                material = _load_pem_pair(
                    self._certificate_path, self._private_key_path, self._password
                )
            else:
                material = _load_pkcs12(self._certificate_path, self._password)
        except SigningError:
            raise
        except FileNotFoundError as e:
            raise SigningError(f"Certificate file not found: {e.filename}") from e
        except (OSError, ValueError, TypeError) as e:
            raise SigningError(f"Certificate could not be loaded: {e}") from e

        certificate = material[1]
        if certificate.not_valid_after_utc <= _utcnow():
            log.warning(
                "ticket_signer.certificate_expired",
                subject=certificate.subject.rfc4514_string(),
                not_valid_after=certificate.not_valid_after_utc.isoformat(),
            )
        log.info(
            "ticket_signer.certificate_loaded",
            subject=certificate.subject.rfc4514_string(),
            serial=hex(certificate.serial_number),
        )
        self._material = material
        return material

    @staticmethod
    def _find_signer_certificate(
        signed_data: cms.SignedData, signer_info: cms.SignerInfo
    ) -> x509.Certificate:
        """Pick the embedded certificate whose issuer + serial match the signer id."""
        sid = signer_info["sid"]
        if sid.name != "issuer_and_serial_number":
            raise SigningError(f"Unsupported CMS signer identifier: {sid.name}")
        issuer_dump = sid.chosen["issuer"].dump()
        serial = sid.chosen["serial_number"].native
        for choice in signed_data["certificates"] or []:
            if choice.name != "certificate":
                continue
            candidate = choice.chosen
            if candidate.serial_number == serial and candidate.issuer.dump() == issuer_dump:
                return x509.load_der_x509_certificate(candidate.dump())
        raise SigningError("CMS does not embed the signer certificate")
