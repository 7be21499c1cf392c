"""Placeholder serving certificate so the reverse proxy can start before ACME issuance."""

from datetime import datetime, timezone

from cryptography.exceptions import UnsupportedAlgorithm

from .cert_utils import generate_private_key, serialize_certificate, serialize_private_key
from .certificate_builder import CertificateBuilder
from .certificate_store import CertificateStore
from .config import LifecycleConfig, parse_positive_int
from .errors import ConfigError, GenerationError, StorageError
from .logging_config import LOGGER
from .models import BootstrapResult

# Latest notAfter an X.509 GeneralizedTime can carry
X509_MAX_NOT_AFTER = datetime(9999, 12, 31, 23, 59, 59, tzinfo=timezone.utc)


class ServingBootstrap:
    """Generates a self-signed pair when the canonical serving pair is missing.

    The proxy needs some certificate to listen on 443, and the HTTP-01
    challenge needs the proxy listening on 80, so a disposable self-signed
    pair is installed first and replaced once ACME issuance succeeds.
    """

    def __init__(self, config: LifecycleConfig, store: CertificateStore) -> None:
        self.config = config
        self.store = store

    def ensure_bootstrap_certificate(
        self,
        domain: str,
        extra_names: list[str] | tuple[str, ...] = (),
        days: int | None = None,
        force: bool = False,
    ) -> BootstrapResult:
        """Ensure a serving pair exists, generating a self-signed one if needed.

        Args:
            domain: Subject CN and first SAN entry
            extra_names: Additional SAN entries, kept in the order given
            days: Validity in days (default: config.default_validity_days)
            force: Regenerate even when a valid pair is present

        Returns:
            BootstrapResult; ``created`` is False when the existing pair was kept

        Raises:
            ConfigError: If the domain is empty, or days is not a positive integer
                or reaches past the X.509 year 9999 limit
            GenerationError: If key or certificate generation fails
            StorageError: If the pair cannot be written
        """
        domain = domain.strip()
        if not domain:
            raise ConfigError("bootstrap requires a primary domain")
        validity_days = parse_positive_int(
            self.config.default_validity_days if days is None else days, "validity days"
        )

        max_days = (X509_MAX_NOT_AFTER - datetime.now(timezone.utc)).days
        if validity_days > max_days:
            raise ConfigError(
                f"validity days must be at most {max_days} (certificates cannot expire after 9999)"
            )

        if not force and self.store.has_valid_bundle():
            LOGGER.info("Serving certificate present in %s; bootstrap skipped", self.store.certs_dir)
            try:
                bundle = self.store.load_bundle()
            except StorageError as e:
                LOGGER.warning("Existing serving certificate is unreadable, kept as-is: %s", e.message)
                bundle = None
            return BootstrapResult(created=False, bundle=bundle)

        dns_names = [domain]
        for name in extra_names:
            name = name.strip()
            if name and name not in dns_names:
                dns_names.append(name)

        LOGGER.info(
            "Generating self-signed certificate CN=%s SAN=%s valid %d days",
            domain,
            ",".join(dns_names),
            validity_days,
        )
        try:
            private_key = generate_private_key(self.config.key_size)
            cert = CertificateBuilder.build_self_signed_server(
                common_name=domain,
                dns_names=dns_names,
                private_key=private_key,
                validity_days=validity_days,
            )
            cert_pem = serialize_certificate(cert)
            key_pem = serialize_private_key(private_key)
        except (ValueError, TypeError, OverflowError, UnsupportedAlgorithm) as e:
            raise GenerationError(f"cannot generate self-signed certificate for {domain}: {e}") from e

        bundle = self.store.write_bundle(cert_pem, key_pem)
        LOGGER.info("Self-signed certificate written to %s", bundle.fullchain_path)
        return BootstrapResult(created=True, bundle=bundle)
