"""
Configuration — typed, validated settings loaded from environment/.env.

Uses pydantic-settings to:
  - Load from environment variables (12-factor app)
  - Fall back to .env file
  - Validate types and constraints at startup
  - Keep secrets (certificate password, database password) out of logs

Architecture: Only AppSettings is a BaseSettings instance. Sub-settings are plain
BaseModel classes populated by AppSettings via env_nested_delimiter="__", so the env
var AFIP__CUIT maps to afip.cuit, DATABASE__HOST maps to database.host, etc.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import BaseModel, Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from afip_invoicer.adapters.wsaa_client import wsaa_url
from afip_invoicer.adapters.wsfe_client import wsfe_url

# Resolve the .env file relative to the project root (two levels above this file),
# so settings load correctly regardless of the working directory at runtime.
_ENV_FILE = Path(__file__).parent.parent.parent / ".env"


class AfipSettings(BaseModel):
    """
    Taxpayer identity and AFIP endpoints.

    The certificate is either a PKCS#12 bundle (certificate_path + password)
    or a PEM certificate with its PEM private key (private_key_path set).
    `production` selects the production endpoints; otherwise the
    homologation (sandbox) ones are used. Explicit URLs override both.
    """

    certificate_path: Path = Field(description="PKCS#12 bundle, or PEM certificate in PEM pair mode")
    certificate_password: SecretStr | None = Field(
        default=None, description="PKCS#12 password, or PEM private key passphrase"
    )
    private_key_path: Path | None = Field(
        default=None, description="PEM private key; enables PEM pair mode"
    )
    cuit: int = Field(description="Issuer CUIT (11 digits)")
    production: bool = Field(default=False, description="Use production endpoints")
    invoicing_service_id: str = Field(default="wsfe", min_length=1, max_length=35)
    wsaa_url: str | None = Field(default=None, description="Override the WSAA LoginCms URL")
    wsfe_url: str | None = Field(default=None, description="Override the WSFEv1 service URL")
    ticket_validity_minutes: int = Field(default=20, ge=1, le=24 * 60)

    @field_validator("cuit")
    @classmethod
    def validate_cuit(cls, value: int) -> int:
        """A CUIT is always 11 digits."""
        if not 10_000_000_000 <= value <= 99_999_999_999:
            raise ValueError(f"CUIT must have 11 digits, got {value}")
        return value

    def get_wsaa_url(self) -> str:
        return self.wsaa_url or wsaa_url(self.production)

    def get_wsfe_url(self) -> str:
        return self.wsfe_url or wsfe_url(self.production)

    def get_password(self) -> str | None:
        return self.certificate_password.get_secret_value() if self.certificate_password else None


class DatabaseSettings(BaseModel):
    """
    PostgreSQL connection configuration.

    Accepts either a full connection string via DATABASE__DSN or individual
    components (DATABASE__HOST, DATABASE__PORT, DATABASE__NAME, DATABASE__USERNAME,
    DATABASE__PASSWORD). DATABASE__DSN takes priority when both are provided.
    """

    dsn: SecretStr | None = Field(
        default=None,
        description="Full PostgreSQL connection string (overrides individual fields)",
    )
    host: str | None = Field(default=None, description="PostgreSQL host")
    port: int = Field(default=5432, ge=1, le=65535, description="PostgreSQL port")
    name: str | None = Field(default=None, description="PostgreSQL database name")
    username: str | None = Field(default=None, description="PostgreSQL username")
    password: SecretStr | None = Field(default=None, description="PostgreSQL password")

    @model_validator(mode="after")
    def resolve_dsn(self) -> DatabaseSettings:
        """Build `dsn` from the components when no full DSN was given."""
        if self.dsn is not None:
            return self
        missing = [f for f, v in [
            ("DATABASE__HOST", self.host),
            ("DATABASE__NAME", self.name),
            ("DATABASE__USERNAME", self.username),
            ("DATABASE__PASSWORD", self.password),
        ] if not v]
        if missing:
            raise ValueError("Set DATABASE__DSN or provide all of: " + ", ".join(missing))
        dsn_value = (
            f"postgresql://{self.username}:{self.password.get_secret_value()}"  # type: ignore[union-attr]
            f"@{self.host}:{self.port}/{self.name}"
        )
        object.__setattr__(self, "dsn", SecretStr(dsn_value))
        return self

    def get_dsn(self) -> str:
        assert self.dsn is not None  # guaranteed by resolve_dsn validator
        return self.dsn.get_secret_value()


class CacheSettings(BaseModel):
    """Ticket cache maintenance."""

    sweep_interval_minutes: int = Field(default=5, ge=1)
    already_authenticated_backoff_seconds: float = Field(default=30.0, ge=0)


class AppSettings(BaseSettings):
    """
    Root application settings — aggregates all sub-settings.

    Load order (highest priority first):
      1. Environment variables
      2. .env file
      3. Default values
    """

    model_config = SettingsConfigDict(
        env_file=_ENV_FILE,
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    afip: AfipSettings
    database: DatabaseSettings
    cache: CacheSettings = Field(default_factory=lambda: CacheSettings())

    http_timeout_seconds: float = Field(default=60, gt=0)
    log_level: str = Field(default="INFO")
    diagnostics_dir: Path | None = Field(
        default=None, description="Where unparseable AFIP responses are written"
    )
