"""Error taxonomy for certificate lifecycle operations.

Every failing external command or filesystem operation is surfaced as exactly
one of these exceptions. Each carries an ``action`` telling the operator what
to do next, and the process exit code the CLI should return.
"""


class CertLifecycleError(Exception):
    """Base class for all lifecycle failures."""

    exit_code = 1
    default_action = ""

    def __init__(self, message: str, action: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.action = action if action is not None else self.default_action

    def diagnostic(self) -> str:
        """Return the message followed by the action hint, if any."""
        if self.action:
            return f"{self.message} ({self.action})"
        return self.message


class ConfigError(CertLifecycleError):
    """Missing or malformed input. Not retried."""

    exit_code = 2
    default_action = "fix the command-line arguments or configuration"


class StorageError(CertLifecycleError):
    """Certificate or challenge directories cannot be written."""

    default_action = "check ownership and permissions of the certificate directories"


class AgentUnavailable(CertLifecycleError):
    """A required external tool is missing or not running."""

    default_action = "install/start Docker and make sure the compose services exist"


class ValidationFailed(CertLifecycleError):
    """The ACME HTTP-01 challenge could not be completed."""

    default_action = (
        "verify the domain's DNS points at this host and port 80 is reachable, then retry"
    )


class RateLimited(CertLifecycleError):
    """The certificate authority is throttling requests."""

    default_action = "wait before retrying or use the staging endpoint"

    def __init__(
        self, message: str, retry_after: str | None = None, action: str | None = None
    ) -> None:
        if retry_after and action is None:
            action = f"retry after {retry_after} or use the staging endpoint"
        super().__init__(message, action)
        self.retry_after = retry_after


class MissingLiveCertificateError(CertLifecycleError):
    """The ACME agent reported success but left no certificate behind."""

    default_action = "check that the primary domain matches the issued certificate name"


class GenerationError(CertLifecycleError):
    """Self-signed key or certificate material could not be produced."""

    default_action = "check the cryptography installation and system entropy"


class ReloadError(CertLifecycleError):
    """The reverse proxy could not be told to reload its certificates."""

    default_action = (
        "start the reverse proxy; the installed certificates are picked up on the next start"
    )
