"""
Domain models — immutable value objects for tickets, invoices and AFIP code tables.

These are pure value objects with no behavior beyond self-validation.
They represent the data exchanged with WSAA (security tickets) and
WSFEv1 (voucher numbering, CAE requests and results).

All models are frozen dataclasses (immutable). A SecurityTicket is a snapshot:
refreshing a ticket replaces the instance, it never mutates one, so concurrent
readers can hold a reference without locking.

Invoice invariants are enforced at construction time so a malformed request
never reaches the network:
  - total > 0, voucher numbers > 0, point of sale in [1, 9999]
  - total == net + VAT + exempt + non-taxed + other taxes
  - type C vouchers carry no VAT and net == total
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from enum import IntEnum

from afip_invoicer.domain.errors import ValidationError

CENT = Decimal("0.01")

MIN_POINT_OF_SALE = 1
MAX_POINT_OF_SALE = 9999

# WSAA and WSFEv1 work in Argentina time (UTC-3, no DST).
AFIP_TZ = timezone(timedelta(hours=-3), "ART")

APPROVED = "A"
REJECTED = "R"


def _now() -> datetime:
    return datetime.now(UTC)


def wire_amount(value: Decimal) -> Decimal:
    """Round to the cent exactly as the amount is sent to WSFEv1."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


# ─────────────────────── AFIP code tables ───────────────────────


class VoucherType(IntEnum):
    """CbteTipo codes used by this core (FEParamGetTiposCbte has the full list)."""

    INVOICE_A = 1
    DEBIT_NOTE_A = 2
    CREDIT_NOTE_A = 3
    INVOICE_B = 6
    DEBIT_NOTE_B = 7
    CREDIT_NOTE_B = 8
    INVOICE_C = 11
    DEBIT_NOTE_C = 12
    CREDIT_NOTE_C = 13


TYPE_C_VOUCHERS = frozenset(
    {VoucherType.INVOICE_C, VoucherType.DEBIT_NOTE_C, VoucherType.CREDIT_NOTE_C}
)


class DocumentType(IntEnum):
    CUIT = 80
    CUIL = 86
    DNI = 96
    FINAL_CONSUMER = 99


class Concept(IntEnum):
    PRODUCTS = 1
    SERVICES = 2
    PRODUCTS_AND_SERVICES = 3


class VatRateId(IntEnum):
    """AlicIva Id codes."""

    ZERO = 3
    TEN_AND_A_HALF = 4
    TWENTY_ONE = 5
    TWENTY_SEVEN = 6
    FIVE = 8
    TWO_AND_A_HALF = 9


class VatCondition(IntEnum):
    """Buyer VAT condition (CondicionIVAReceptorId), mandatory since RG 5616."""

    REGISTERED = 1
    NOT_REGISTERED = 2
    NOT_LIABLE = 3
    EXEMPT = 4
    FINAL_CONSUMER = 5
    MONOTAX = 6
    UNCATEGORIZED = 7
    FOREIGN_SUPPLIER = 8
    FOREIGN_CLIENT = 9
    VAT_RELEASED = 10
    REGISTERED_PERCEPTION_AGENT = 11
    OCCASIONAL_SMALL_TAXPAYER = 12
    SOCIAL_MONOTAX = 13
    OCCASIONAL_SMALL_TAXPAYER_SOCIAL = 14


# ─────────────────────── Security tickets (WSAA) ───────────────────────


@dataclass(frozen=True, slots=True)
class SecurityTicket:
    """
    Access ticket issued by WSAA for one service.

    `token` and `sign` are opaque credentials sent in every WSFEv1 Auth block.
    `raw_response` keeps the original loginTicketResponse for audit.
    """

    service_id: str
    token: str = field(repr=False)
    sign: str = field(repr=False)
    issued_at: datetime
    expires_at: datetime
    raw_response: str = field(default="", repr=False)

    def __post_init__(self) -> None:
        if not self.token or not self.sign:
            raise ValidationError(f"Ticket for {self.service_id!r} has an empty token or sign")
        if self.expires_at <= self.issued_at:
            raise ValidationError(
                f"Ticket for {self.service_id!r} expires at {self.expires_at.isoformat()}, "
                f"not after issue time {self.issued_at.isoformat()}"
            )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or _now()) >= self.expires_at

    def time_to_expiry(self, now: datetime | None = None) -> timedelta:
        return self.expires_at - (now or _now())


@dataclass(frozen=True, slots=True)
class AuthBlock:
    """The <Auth> element shared by every WSFEv1 operation."""

    token: str = field(repr=False)
    sign: str = field(repr=False)
    cuit: int

    @classmethod
    def from_ticket(cls, ticket: SecurityTicket, cuit: int) -> AuthBlock:
        return cls(token=ticket.token, sign=ticket.sign, cuit=cuit)


# ─────────────────────── WSFEv1 responses ───────────────────────


@dataclass(frozen=True, slots=True)
class RemoteMessage:
    """An Err / Obs / Evt entry returned by WSFEv1."""

    code: int
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass(frozen=True, slots=True)
class LastVoucher:
    point_of_sale: int
    voucher_type: int
    number: int


@dataclass(frozen=True, slots=True)
class ServerStatus:
    """FEDummy result — identity/health of the three WSFEv1 backends."""

    app_server: str
    db_server: str
    auth_server: str

    @property
    def is_ok(self) -> bool:
        return all(value.upper() == "OK" for value in (self.app_server, self.db_server, self.auth_server))


@dataclass(frozen=True, slots=True)
class CatalogItem:
    """One row of a FEParamGet* code table."""

    id: int
    description: str
    valid_from: str | None = None
    valid_to: str | None = None


# ─────────────────────── CAE requests ───────────────────────


@dataclass(frozen=True, slots=True)
class VatRate:
    """AlicIva — taxable base and VAT amount for one rate."""

    id: int
    base: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class Tax:
    """Tributo — a non-VAT tax line."""

    id: int
    description: str
    base: Decimal
    rate: Decimal
    amount: Decimal


@dataclass(frozen=True, slots=True)
class InvoiceHeader:
    """FeCabReq."""

    point_of_sale: int
    voucher_type: int
    batch_count: int = 1

    def __post_init__(self) -> None:
        if not MIN_POINT_OF_SALE <= self.point_of_sale <= MAX_POINT_OF_SALE:
            raise ValidationError(
                f"Point of sale must be between {MIN_POINT_OF_SALE} and {MAX_POINT_OF_SALE}, "
                f"got {self.point_of_sale}"
            )
        if self.batch_count < 1:
            raise ValidationError(f"Batch count must be positive, got {self.batch_count}")


@dataclass(frozen=True, slots=True)
class InvoiceDetail:
    """
    FECAEDetRequest — one voucher (or a from..to range of identical vouchers).

    Amounts are Decimals compared to the cent. `vat_condition` is the buyer's
    VAT condition, mandatory per current regulation.
    """

    concept: int
    document_type: int
    document_number: int
    number_from: int
    number_to: int
    issue_date: date
    total: Decimal
    net: Decimal
    vat_condition: int
    non_taxed: Decimal = Decimal("0")
    exempt: Decimal = Decimal("0")
    vat: Decimal = Decimal("0")
    other_taxes: Decimal = Decimal("0")
    currency: str = "PES"
    exchange_rate: Decimal = Decimal("1")
    service_from: date | None = None
    service_to: date | None = None
    payment_due: date | None = None
    vat_rates: tuple[VatRate, ...] = ()
    taxes: tuple[Tax, ...] = ()

    def __post_init__(self) -> None:
        if wire_amount(self.total) <= 0:
            raise ValidationError(f"Total amount must be greater than zero, got {self.total}")
        if self.number_from <= 0 or self.number_to <= 0:
            raise ValidationError(
                f"Voucher numbers must be positive, got {self.number_from}..{self.number_to}"
            )
        if self.number_from > self.number_to:
            raise ValidationError(
                f"Voucher range is inverted: {self.number_from}..{self.number_to}"
            )
        for name in ("net", "non_taxed", "exempt", "vat", "other_taxes"):
            if wire_amount(getattr(self, name)) < 0:
                raise ValidationError(f"Amount {name} cannot be negative")
        if wire_amount(self.exchange_rate) <= 0:
            raise ValidationError(f"Exchange rate must be positive, got {self.exchange_rate}")

        # Reconcile the rounded amounts, each one as it will appear on the wire.
        components = sum(
            (
                wire_amount(amount)
                for amount in (self.net, self.vat, self.exempt, self.non_taxed, self.other_taxes)
            ),
            Decimal("0"),
        )
        if wire_amount(components) != wire_amount(self.total):
            raise ValidationError(
                f"Amounts do not reconcile: total {wire_amount(self.total)} != "
                f"net + VAT + exempt + non-taxed + other taxes ({wire_amount(components)})"
            )
        if self.vat_rates:
            vat_sum = sum((wire_amount(rate.amount) for rate in self.vat_rates), Decimal("0"))
            if wire_amount(vat_sum) != wire_amount(self.vat):
                raise ValidationError(
                    f"VAT breakdown sums to {wire_amount(vat_sum)}, VAT amount is "
                    f"{wire_amount(self.vat)}"
                )
        if self.taxes:
            tax_sum = sum((wire_amount(tax.amount) for tax in self.taxes), Decimal("0"))
            if wire_amount(tax_sum) != wire_amount(self.other_taxes):
                raise ValidationError(
                    f"Tax breakdown sums to {wire_amount(tax_sum)}, other taxes amount is "
                    f"{wire_amount(self.other_taxes)}"
                )
        if self.concept in (Concept.SERVICES, Concept.PRODUCTS_AND_SERVICES):
            if self.service_from is None or self.service_to is None or self.payment_due is None:
                raise ValidationError(
                    "Service vouchers require service period dates and a payment due date"
                )
            if self.service_from > self.service_to:
                raise ValidationError("Service period start is after its end")


@dataclass(frozen=True, slots=True)
class InvoiceAuthorizationRequest:
    """FECAERequest — header plus detail lines."""

    header: InvoiceHeader
    details: tuple[InvoiceDetail, ...]

    def __post_init__(self) -> None:
        if not self.details:
            raise ValidationError("An authorization request needs at least one detail line")
        if self.header.batch_count != len(self.details):
            raise ValidationError(
                f"Batch count {self.header.batch_count} does not match "
                f"{len(self.details)} detail line(s)"
            )
        if self.header.voucher_type in TYPE_C_VOUCHERS:
            for detail in self.details:
                if wire_amount(detail.vat) != 0 or detail.vat_rates:
                    raise ValidationError("Type C vouchers cannot itemize VAT")
                if wire_amount(detail.net) != wire_amount(detail.total):
                    raise ValidationError(
                        f"Type C vouchers require net == total, got net {wire_amount(detail.net)} "
                        f"and total {wire_amount(detail.total)}"
                    )


@dataclass(frozen=True, slots=True)
class InvoiceAuthorizationResult:
    """
    Parsed FECAESolicitar outcome.

    A rejection is a normal outcome: `success` is False and `errors` /
    `observations` explain why. Results are never resubmitted automatically.
    """

    success: bool
    result_code: str
    point_of_sale: int
    voucher_type: int
    voucher_number: int | None = None
    cae: str | None = None
    cae_expiration: date | None = None
    processed_at: datetime | None = None
    detail_result_code: str | None = None
    errors: tuple[RemoteMessage, ...] = ()
    observations: tuple[RemoteMessage, ...] = ()
    events: tuple[RemoteMessage, ...] = ()


# ─────────────────────── Caller input ───────────────────────


@dataclass(frozen=True, slots=True)
class Buyer:
    document_type: int = DocumentType.FINAL_CONSUMER
    document_number: int = 0
    vat_condition: int = VatCondition.FINAL_CONSUMER


@dataclass(frozen=True, slots=True)
class InvoiceDraft:
    """
    What the caller wants invoiced, before a voucher number is assigned.

    `net` defaults to whatever remains of `total` after VAT, exempt,
    non-taxed and other taxes, which for a type C voucher is the total.
    """

    point_of_sale: int
    total: Decimal
    voucher_type: int = VoucherType.INVOICE_C
    concept: int = Concept.PRODUCTS
    buyer: Buyer = field(default_factory=Buyer)
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
    vat_rates: tuple[VatRate, ...] = ()
    taxes: tuple[Tax, ...] = ()

    def __post_init__(self) -> None:
        if wire_amount(self.total) <= 0:
            raise ValidationError(f"Total amount must be greater than zero, got {self.total}")
        if not MIN_POINT_OF_SALE <= self.point_of_sale <= MAX_POINT_OF_SALE:
            raise ValidationError(
                f"Point of sale must be between {MIN_POINT_OF_SALE} and {MAX_POINT_OF_SALE}, "
                f"got {self.point_of_sale}"
            )

    @property
    def resolved_net(self) -> Decimal:
        if self.net is not None:
            return self.net
        return self.total - self.vat - self.exempt - self.non_taxed - self.other_taxes
