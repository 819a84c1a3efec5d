"""
Unit tests for configuration loading.

Environment variables are set with monkeypatch; `_env_file=None` keeps a
developer's local .env out of the picture.
"""

from __future__ import annotations

from pathlib import Path

import pytest
from pydantic import ValidationError

from afip_invoicer.adapters.wsaa_client import WSAA_PRODUCTION_URL, WSAA_SANDBOX_URL
from afip_invoicer.adapters.wsfe_client import WSFE_SANDBOX_URL
from afip_invoicer.config import AfipSettings, AppSettings, DatabaseSettings


@pytest.fixture()
def base_env(monkeypatch: pytest.MonkeyPatch) -> pytest.MonkeyPatch:
    monkeypatch.setenv("AFIP__CERTIFICATE_PATH", "/etc/afip/certificate.p12")
    monkeypatch.setenv("AFIP__CERTIFICATE_PASSWORD", "p12-secret")
    monkeypatch.setenv("AFIP__CUIT", "20123456789")
    monkeypatch.setenv("DATABASE__DSN", "postgresql://afip:pw@db:5432/afip")
    return monkeypatch


class TestAppSettings:
    def test_loads_nested_settings_from_env(self, base_env: pytest.MonkeyPatch) -> None:
        """
        GIVEN AFIP__* and DATABASE__* environment variables
        WHEN AppSettings is loaded
        THEN nested settings are populated and defaults apply.
        """
        settings = AppSettings(_env_file=None)

        assert settings.afip.cuit == 20123456789
        assert settings.afip.certificate_path == Path("/etc/afip/certificate.p12")
        assert settings.afip.get_password() == "p12-secret"
        assert settings.afip.production is False
        assert settings.afip.invoicing_service_id == "wsfe"
        assert settings.database.get_dsn() == "postgresql://afip:pw@db:5432/afip"
        assert settings.cache.sweep_interval_minutes == 5
        assert settings.cache.already_authenticated_backoff_seconds == 30.0
        assert settings.http_timeout_seconds == 60

    def test_secrets_are_masked(self, base_env: pytest.MonkeyPatch) -> None:
        settings = AppSettings(_env_file=None)
        assert "p12-secret" not in repr(settings)
        assert "pw@db" not in repr(settings)

    def test_cache_overrides(self, base_env: pytest.MonkeyPatch) -> None:
        base_env.setenv("CACHE__SWEEP_INTERVAL_MINUTES", "10")
        base_env.setenv("CACHE__ALREADY_AUTHENTICATED_BACKOFF_SECONDS", "5")
        settings = AppSettings(_env_file=None)
        assert settings.cache.sweep_interval_minutes == 10
        assert settings.cache.already_authenticated_backoff_seconds == 5.0

    def test_missing_afip_section_fails(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DATABASE__DSN", "postgresql://afip:pw@db:5432/afip")
        with pytest.raises(ValidationError):
            AppSettings(_env_file=None)


class TestAfipSettings:
    @pytest.mark.parametrize("cuit", [123, 201234567890])
    def test_rejects_cuit_without_11_digits(self, cuit: int) -> None:
        with pytest.raises(ValidationError, match="11 digits"):
            AfipSettings(certificate_path=Path("c.p12"), cuit=cuit)

    def test_sandbox_urls_by_default(self) -> None:
        afip = AfipSettings(certificate_path=Path("c.p12"), cuit=20123456789)
        assert afip.get_wsaa_url() == WSAA_SANDBOX_URL
        assert afip.get_wsfe_url() == WSFE_SANDBOX_URL
        assert afip.get_password() is None

    def test_production_urls(self) -> None:
        afip = AfipSettings(certificate_path=Path("c.p12"), cuit=20123456789, production=True)
        assert afip.get_wsaa_url() == WSAA_PRODUCTION_URL

    def test_explicit_url_wins(self) -> None:
        afip = AfipSettings(
            certificate_path=Path("c.p12"),
            cuit=20123456789,
            production=True,
            wsaa_url="http://localhost:8080/wsaa",
        )
        assert afip.get_wsaa_url() == "http://localhost:8080/wsaa"

    def test_rejects_long_service_id(self) -> None:
        with pytest.raises(ValidationError):
            AfipSettings(certificate_path=Path("c.p12"), cuit=20123456789, invoicing_service_id="x" * 36)


class TestDatabaseSettings:
    def test_builds_dsn_from_components(self) -> None:
        db = DatabaseSettings(host="db", port=5433, name="afip", username="u", password="p")
        assert db.get_dsn() == "postgresql://u:p@db:5433/afip"

    def test_dsn_takes_priority(self) -> None:
        db = DatabaseSettings(dsn="postgresql://x:y@z/w", host="ignored")
        assert db.get_dsn() == "postgresql://x:y@z/w"

    def test_missing_components_are_named(self) -> None:
        with pytest.raises(ValidationError, match="DATABASE__PASSWORD"):
            DatabaseSettings(host="db", name="afip", username="u")
