"""ACME HTTP-01 issuance and renewal through a certbot container."""

import re
from datetime import datetime

from .cert_utils import deserialize_certificate
from .config import LifecycleConfig
from .errors import AgentUnavailable, CertLifecycleError, RateLimited, ValidationFailed
from .logging_config import LOGGER
from .models import (
    FULLCHAIN_NAME,
    IssuanceRequest,
    LiveCertificateDirectory,
    RenewalResult,
    RenewalStatus,
)
from .process_control import ComposeRunner, ProcessResult

# Let's Encrypt ACME endpoints
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

# Container runtime exit codes: daemon error, not executable, not found
RUNTIME_FAILURE_CODES = {125, 126, 127}

RUNTIME_MARKERS = (
    "no such service",
    "cannot connect to the docker daemon",
    "pull access denied",
    "executable file not found",
)
RATE_LIMIT_MARKERS = (
    "ratelimited",
    "too many certificates",
    "too many failed authorizations",
    "too many new orders",
    "too many registrations",
)
CHALLENGE_MARKERS = (
    "some challenges have failed",
    "challenge failed",
    "unauthorized",
    "timeout during connect",
    "connection refused",
    "nxdomain",
    "dns problem",
)
SKIPPED_MARKER = "Certificate not yet due for renewal"


def _extract_retry_after_iso(text: str) -> str | None:
    m = re.search(
        r"retry after\s+([0-9]{4}-[0-9]{2}-[0-9]{2}\s+[0-9]{2}:[0-9]{2}:[0-9]{2})\s+UTC",
        text,
        re.I,
    )
    if not m:
        return None
    try:
        dt = datetime.strptime(m.group(1), "%Y-%m-%d %H:%M:%S")
    except ValueError:
        return None
    return dt.strftime("%Y-%m-%dT%H:%M:%SZ")


def classify_failure(result: ProcessResult, context: str) -> CertLifecycleError:
    """Map a non-zero agent result to exactly one taxonomy error.

    Anything that is neither a runtime failure nor rate limiting is reported
    as ValidationFailed with the tail of the agent output.

    Args:
        result: Failed agent invocation
        context: What was being attempted, for the message

    Returns:
        The error to raise
    """
    text = result.output
    lowered = text.lower()
    if result.returncode in RUNTIME_FAILURE_CODES or any(m in lowered for m in RUNTIME_MARKERS):
        return AgentUnavailable(f"{context}: ACME agent could not be started:\n{result.tail()}")
    if any(m in lowered for m in RATE_LIMIT_MARKERS):
        return RateLimited(
            f"{context}: rate limited by the certificate authority:\n{result.tail()}",
            retry_after=_extract_retry_after_iso(text),
        )
    if any(m in lowered for m in CHALLENGE_MARKERS):
        return ValidationFailed(f"{context}: HTTP-01 challenge failed:\n{result.tail()}")
    return ValidationFailed(
        f"{context}: ACME agent exited with {result.returncode}:\n{result.tail()}"
    )


class AcmeClient:
    """Certbot-backed ACME client sharing ``config.certs_dir`` with the agent."""

    def __init__(self, config: LifecycleConfig, runner: ComposeRunner) -> None:
        self.config = config
        self.runner = runner

    def directory_url(self, staging: bool) -> str:
        return ACME_DIRECTORY_STAGING if staging else ACME_DIRECTORY_PROD

    def build_issue_args(self, request: IssuanceRequest) -> list[str]:
        """Build the certbot ``certonly`` argument list for ``request``."""
        args = [
            "certonly",
            "--webroot",
            "-w",
            self.config.agent_webroot,
            "--cert-name",
            request.primary_domain,
            "--config-dir",
            self.config.agent_certs_dir,
        ]
        for domain in request.domains:
            args += ["-d", domain]
        args += [
            "--email",
            request.contact_email,
            "--agree-tos",
            "--no-eff-email",
            "--non-interactive",
            "--keep-until-expiring",
            "--expand",
            "--server",
            self.directory_url(request.use_staging_endpoint),
        ]
        return args

    def build_renew_args(self) -> list[str]:
        return ["renew", "--config-dir", self.config.agent_certs_dir, "--non-interactive"]

    def issue(self, request: IssuanceRequest) -> LiveCertificateDirectory:
        """Obtain (or keep, if still valid) a certificate for ``request``.

        The reverse proxy must already serve the webroot on port 80.

        Args:
            request: Validated issuance request

        Returns:
            Live directory of the primary domain

        Raises:
            ConfigError: If the request is invalid
            AgentUnavailable, RateLimited, ValidationFailed: On agent failure
        """
        request.validate()
        endpoint = "staging" if request.use_staging_endpoint else "production"
        LOGGER.info(
            "Requesting certificate for %s from %s endpoint",
            ", ".join(request.domains),
            endpoint,
        )
        result = self.runner.run(self.config.acme_service, self.build_issue_args(request))
        if not result.ok:
            raise classify_failure(result, f"issuing {request.primary_domain}")

        if SKIPPED_MARKER in result.output:
            LOGGER.info("Existing certificate for %s is still valid; kept", request.primary_domain)
        else:
            LOGGER.info("Certificate issued for %s", request.primary_domain)
        return LiveCertificateDirectory(
            domain=request.primary_domain,
            path=self.config.live_dir / request.primary_domain,
        )

    def renew(self) -> RenewalResult:
        """Renew every tracked certificate inside its renewal window.

        Renewed domains are those whose live certificate serial changed during
        the run; domains not yet due are skipped without error.

        Returns:
            RenewalResult with status RENEWED and the renewed directories, or NO_OP

        Raises:
            AgentUnavailable, RateLimited, ValidationFailed: On agent failure
        """
        before = self._live_serials()
        LOGGER.info("Attempting renewal of %d tracked certificate(s)", len(before))
        result = self.runner.run(self.config.acme_service, self.build_renew_args())
        after = self._live_serials()

        renewed = [
            LiveCertificateDirectory(domain=domain, path=self.config.live_dir / domain)
            for domain, serial in after.items()
            if serial is not None and before.get(domain) != serial
        ]
        if not result.ok:
            if renewed:
                LOGGER.warning(
                    "Renewal partially succeeded for %s", ", ".join(d.domain for d in renewed)
                )
            raise classify_failure(result, "renewing certificates")

        if not renewed:
            LOGGER.info("No certificates due for renewal")
            return RenewalResult(status=RenewalStatus.NO_OP)
        LOGGER.info("Renewed: %s", ", ".join(d.domain for d in renewed))
        return RenewalResult(status=RenewalStatus.RENEWED, renewed=renewed)

    def _live_serials(self) -> dict[str, int | None]:
        serials: dict[str, int | None] = {}
        live_dir = self.config.live_dir
        if not live_dir.is_dir():
            return serials
        for domain_dir in sorted(p for p in live_dir.iterdir() if p.is_dir()):
            try:
                cert = deserialize_certificate((domain_dir / FULLCHAIN_NAME).read_bytes())
                serials[domain_dir.name] = cert.serial_number
            except (OSError, ValueError):
                serials[domain_dir.name] = None
        return serials
