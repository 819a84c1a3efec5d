"""
Shared test fixtures for the afip-invoicer test suite.

Provides a freshly generated self-signed certificate (PKCS#12 and PEM pair),
a controllable clock and in-memory ticket store fakes.
"""

from __future__ import annotations

from pathlib import Path

import pytest

from afip_invoicer.adapters.ticket_signer import CmsTicketSigner
from tests.support import (
    CertificateFiles,
    InMemoryTicketStore,
    MutableClock,
    RecordingListener,
    create_certificate_files,
)


@pytest.fixture(scope="session")
def certificate_files(tmp_path_factory: pytest.TempPathFactory) -> CertificateFiles:
    """One RSA-2048 certificate per session; key generation is slow."""
    directory: Path = tmp_path_factory.mktemp("certificates")
    return create_certificate_files(directory)


@pytest.fixture()
def signer(certificate_files: CertificateFiles) -> CmsTicketSigner:
    return CmsTicketSigner(
        certificate_path=certificate_files.p12_path,
        password=certificate_files.password,
    )


@pytest.fixture()
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture()
def store(clock: MutableClock) -> InMemoryTicketStore:
    return InMemoryTicketStore(clock)


@pytest.fixture()
def listener() -> RecordingListener:
    return RecordingListener()
