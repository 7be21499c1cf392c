"""Data models for certificate lifecycle operations."""

import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

from .errors import CertLifecycleError, ConfigError

FULLCHAIN_NAME = "fullchain.pem"
PRIVATE_KEY_NAME = "privkey.pem"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class Issuer(Enum):
    """Who signed the serving certificate."""

    SELF_SIGNED = "self-signed"
    ACME_STAGING = "acme-staging"
    ACME_PRODUCTION = "acme-production"


@dataclass
class CertificateBundle:
    """Certificate chain + private key pair as read from disk."""

    domain: str
    alternative_names: list[str]
    fullchain_path: Path
    private_key_path: Path
    not_after: datetime
    issuer: Issuer
    serial: str


@dataclass
class IssuanceRequest:
    """Parameters for one ACME certificate order.

    ``alternative_names`` share the primary domain's certificate and are kept
    in the order given.
    """

    primary_domain: str
    alternative_names: list[str]
    contact_email: str
    use_staging_endpoint: bool = False

    @classmethod
    def create(
        cls,
        primary_domain: str,
        contact_email: str,
        alternative_names: list[str] | tuple[str, ...] = (),
        use_staging_endpoint: bool = False,
    ) -> "IssuanceRequest":
        """Normalize inputs (trim, lower-case hostnames, drop blanks) and validate.

        Raises:
            ConfigError: If the normalized request is invalid
        """
        request = cls(
            primary_domain=primary_domain.strip().lower(),
            alternative_names=[n.strip().lower() for n in alternative_names if n.strip()],
            contact_email=contact_email.strip(),
            use_staging_endpoint=use_staging_endpoint,
        )
        request.validate()
        return request

    @property
    def domains(self) -> list[str]:
        """Primary domain followed by alternative names."""
        return [self.primary_domain, *self.alternative_names]

    def validate(self) -> None:
        """Check the request fields.

        Raises:
            ConfigError: On empty domain, malformed email, duplicate alternative
                names, or an alternative name equal to the primary domain
        """
        if not self.primary_domain:
            raise ConfigError("primary domain must not be empty")
        if not self.contact_email:
            raise ConfigError("contact email must not be empty")
        if not EMAIL_PATTERN.match(self.contact_email):
            raise ConfigError(f"contact email is not a valid address: {self.contact_email}")
        if len(set(self.alternative_names)) != len(self.alternative_names):
            raise ConfigError(f"duplicate alternative names: {self.alternative_names}")
        if self.primary_domain in self.alternative_names:
            raise ConfigError(
                f"alternative names must not repeat the primary domain {self.primary_domain}"
            )


@dataclass
class LiveCertificateDirectory:
    """Per-domain output directory written by the ACME agent (``live/<domain>``)."""

    domain: str
    path: Path

    @property
    def fullchain_path(self) -> Path:
        return self.path / FULLCHAIN_NAME

    @property
    def private_key_path(self) -> Path:
        return self.path / PRIVATE_KEY_NAME

    def is_complete(self) -> bool:
        """True if both files exist and are non-empty."""
        return all(
            p.is_file() and p.stat().st_size > 0
            for p in (self.fullchain_path, self.private_key_path)
        )


class RenewalStatus(Enum):
    RENEWED = "renewed"
    NO_OP = "no-op"


@dataclass
class RenewalResult:
    """Outcome of one renewal run; ``renewed`` lists only renewed domains."""

    status: RenewalStatus
    renewed: list[LiveCertificateDirectory] = field(default_factory=list)

    @property
    def is_noop(self) -> bool:
        return self.status is RenewalStatus.NO_OP


@dataclass
class BootstrapResult:
    """Result from ensuring a serving certificate exists.

    ``created`` is False when a pair was already in place. ``bundle`` is None
    when that existing pair cannot be parsed; it is kept as-is regardless.
    """

    created: bool
    bundle: CertificateBundle | None = None


class LifecycleState(Enum):
    IDLE = "idle"
    BOOTSTRAPPED = "bootstrapped"
    SERVING = "serving"
    VALIDATING = "validating"
    ISSUED = "issued"
    INSTALLED = "installed"
    RELOADED = "reloaded"
    FAILED = "failed"


@dataclass
class LifecycleResult:
    """Final state and transition history of an orchestrated run."""

    state: LifecycleState
    history: list[LifecycleState]
    bundle: CertificateBundle | None = None
    renewal: RenewalResult | None = None
    failure: CertLifecycleError | None = None
