"""Test fixtures for cert_lifecycle tests."""

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.x509.oid import NameOID

from cert_lifecycle.lib.cert_utils import (
    generate_private_key,
    generate_serial_number,
    serialize_certificate,
    serialize_private_key,
)
from cert_lifecycle.lib.certificate_store import CertificateStore
from cert_lifecycle.lib.config import LifecycleConfig
from cert_lifecycle.lib.models import LiveCertificateDirectory
from cert_lifecycle.lib.process_control import ComposeRunner, ProcessResult


def ok_result(stdout: str = "", argv: list[str] | None = None) -> ProcessResult:
    """Successful ProcessResult."""
    return ProcessResult(argv=argv or [], returncode=0, stdout=stdout, stderr="")


@pytest.fixture(scope="session")
def ca_key() -> RSAPrivateKey:
    """Key of the fake ACME issuing CA (shared; key generation is slow)."""
    return generate_private_key(key_size=2048)


@pytest.fixture(scope="session")
def leaf_key() -> RSAPrivateKey:
    """Key reused for every issued leaf certificate."""
    return generate_private_key(key_size=2048)


@pytest.fixture
def lifecycle_config(tmp_path: Path) -> LifecycleConfig:
    """Return config rooted at a temporary project directory."""
    return LifecycleConfig(project_dir=tmp_path, startup_timeout=0.1)


@pytest.fixture
def store(lifecycle_config: LifecycleConfig) -> CertificateStore:
    """Return store with directories created."""
    store = CertificateStore(lifecycle_config)
    store.ensure_directories()
    return store


@pytest.fixture
def issue_leaf(ca_key: RSAPrivateKey, leaf_key: RSAPrivateKey) -> Callable[..., x509.Certificate]:
    """Return factory for CA-signed leaf certificates, as an ACME CA would issue."""

    def _issue(
        domain: str,
        alt_names: list[str] | None = None,
        issuer_cn: str = "R11",
        validity_days: int = 90,
    ) -> x509.Certificate:
        now = datetime.now(UTC)
        names = [domain, *(alt_names or [])]
        return (
            x509.CertificateBuilder()
            .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
            .issuer_name(
                x509.Name(
                    [
                        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Let's Encrypt"),
                        x509.NameAttribute(NameOID.COMMON_NAME, issuer_cn),
                    ]
                )
            )
            .public_key(leaf_key.public_key())
            .serial_number(generate_serial_number())
            .not_valid_before(now)
            .not_valid_after(now + timedelta(days=validity_days))
            .add_extension(
                x509.SubjectAlternativeName([x509.DNSName(n) for n in names]),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )

    return _issue


@pytest.fixture
def write_live(
    lifecycle_config: LifecycleConfig,
    leaf_key: RSAPrivateKey,
    issue_leaf: Callable[..., x509.Certificate],
) -> Callable[..., LiveCertificateDirectory]:
    """Return function writing live/<domain>/{fullchain,privkey}.pem like certbot does."""

    def _write(domain: str, alt_names: list[str] | None = None, **kwargs) -> LiveCertificateDirectory:
        live_dir = lifecycle_config.live_dir / domain
        live_dir.mkdir(parents=True, exist_ok=True)
        cert = issue_leaf(domain, alt_names, **kwargs)
        (live_dir / "fullchain.pem").write_bytes(serialize_certificate(cert))
        (live_dir / "privkey.pem").write_bytes(serialize_private_key(leaf_key))
        return LiveCertificateDirectory(domain=domain, path=live_dir)

    return _write


@pytest.fixture
def mock_runner() -> MagicMock:
    """Return ComposeRunner double with a running proxy and successful commands."""
    runner = MagicMock(spec=ComposeRunner)
    runner.is_running.return_value = True
    runner.run.return_value = ok_result()
    runner.exec.return_value = ok_result()
    runner.start.return_value = ok_result()
    return runner
