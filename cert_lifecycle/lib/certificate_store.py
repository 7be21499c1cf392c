"""On-disk certificate material: canonical serving pair and ACME live directories.

The reverse proxy reads ``{certs}/fullchain.pem`` and ``{certs}/privkey.pem``.
Both are relative symlinks into ``{certs}/.bundles/current/``, and ``current``
is itself a symlink to a versioned directory holding one complete pair. New
material is written to a fresh versioned directory and published by replacing
``current`` in a single rename, so a reader resolves either the old pair or
the new pair, never one file from each.
"""

import os
import shutil
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .cert_utils import deserialize_certificate, public_key_matches, read_bundle
from .config import LifecycleConfig
from .errors import MissingLiveCertificateError, StorageError
from .logging_config import LOGGER
from .models import (
    FULLCHAIN_NAME,
    PRIVATE_KEY_NAME,
    CertificateBundle,
    LiveCertificateDirectory,
)

BUNDLES_DIR_NAME = ".bundles"
CURRENT_LINK_NAME = "current"
KEEP_PREVIOUS_VERSIONS = 1


def _write_file(path: Path, content: bytes, mode: int) -> None:
    """Create ``path`` with ``mode`` from the start, write, and fsync."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(content)
        f.flush()
        os.fsync(f.fileno())
    os.chmod(path, mode)


def _fsync_dir(path: Path) -> None:
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)


def _replace_with_symlink(link: Path, target: str) -> None:
    """Point ``link`` at ``target`` by renaming a temporary symlink over it."""
    tmp_link = link.with_name(f".{link.name}.{uuid.uuid4().hex[:8]}.tmp")
    os.symlink(target, tmp_link)
    try:
        os.replace(tmp_link, link)
    except OSError:
        tmp_link.unlink(missing_ok=True)
        raise


class CertificateStore:
    """Reads and publishes certificate material under ``config.certs_dir``."""

    def __init__(self, config: LifecycleConfig) -> None:
        self.config = config
        self.certs_dir: Path = config.certs_dir
        self.bundles_dir = self.certs_dir / BUNDLES_DIR_NAME
        self.current_link = self.bundles_dir / CURRENT_LINK_NAME

    # ------------------ directories ------------------
    def ensure_directories(self) -> None:
        """Create webroot, log and certs directories; safe to repeat.

        Raises:
            StorageError: If a directory cannot be created or is not writable
        """
        for directory in (self.config.webroot_dir, self.config.logs_dir, self.certs_dir):
            try:
                directory.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise StorageError(f"cannot create directory {directory}: {e}") from e
            if not os.access(directory, os.W_OK):
                raise StorageError(f"directory is not writable: {directory}")
        LOGGER.debug("Directories ready under %s", self.config.project_dir)

    # ------------------ canonical pair ------------------
    @property
    def fullchain_path(self) -> Path:
        return self.certs_dir / FULLCHAIN_NAME

    @property
    def private_key_path(self) -> Path:
        return self.certs_dir / PRIVATE_KEY_NAME

    def has_valid_bundle(self, canonical_path: Path | None = None) -> bool:
        """True iff both fullchain and private key exist with non-zero size.

        Existence only: expiry and signatures are not checked here.

        Args:
            canonical_path: Directory holding the pair (default: certs_dir)
        """
        directory = canonical_path or self.certs_dir
        for path in (directory / FULLCHAIN_NAME, directory / PRIVATE_KEY_NAME):
            try:
                if not path.is_file() or path.stat().st_size == 0:
                    return False
            except OSError:
                return False
        return True

    def load_bundle(self) -> CertificateBundle | None:
        """Describe the canonical pair, or None when it is incomplete.

        Raises:
            StorageError: If the pair exists but cannot be read or parsed
        """
        if not self.has_valid_bundle():
            return None
        try:
            return read_bundle(self.fullchain_path, self.private_key_path)
        except (OSError, ValueError) as e:
            raise StorageError(f"cannot read serving certificate {self.fullchain_path}: {e}") from e

    def write_bundle(self, fullchain_pem: bytes, private_key_pem: bytes) -> CertificateBundle:
        """Publish a new canonical pair atomically.

        Args:
            fullchain_pem: Leaf certificate followed by any intermediates
            private_key_pem: Matching private key

        Returns:
            CertificateBundle for the published pair

        Raises:
            StorageError: On any filesystem failure
        """
        try:
            self._publish(fullchain_pem, private_key_pem)
        except OSError as e:
            raise StorageError(f"cannot write serving certificate in {self.certs_dir}: {e}") from e
        return self._require_bundle()

    # ------------------ ACME live directories ------------------
    def live_directory(self, domain: str) -> LiveCertificateDirectory:
        return LiveCertificateDirectory(domain=domain, path=self.config.live_dir / domain)

    def live_domains(self) -> list[str]:
        """Names of per-domain directories the ACME agent has produced."""
        live_dir = self.config.live_dir
        if not live_dir.is_dir():
            return []
        return sorted(p.name for p in live_dir.iterdir() if p.is_dir())

    def matches_live(self, source: LiveCertificateDirectory) -> bool:
        """True if the canonical pair is byte-identical to ``source``."""
        if not (self.has_valid_bundle() and source.is_complete()):
            return False
        try:
            return (
                self.fullchain_path.read_bytes() == source.fullchain_path.read_bytes()
                and self.private_key_path.read_bytes() == source.private_key_path.read_bytes()
            )
        except OSError as e:
            raise StorageError(f"cannot compare {source.path} with serving certificate: {e}") from e

    def install_bundle(self, source: LiveCertificateDirectory, domain: str) -> CertificateBundle:
        """Copy the domain's live pair to the canonical serving path.

        A no-op when the canonical pair already matches the live pair.

        Args:
            source: Live directory produced by the ACME agent
            domain: Primary domain the certificate was issued for

        Returns:
            CertificateBundle for the installed pair

        Raises:
            MissingLiveCertificateError: If the live pair is absent, empty, or its
                key does not belong to its certificate
            StorageError: On any other filesystem failure
        """
        if source.domain != domain:
            raise MissingLiveCertificateError(
                f"live directory {source.path} belongs to {source.domain}, not {domain}"
            )
        if not source.is_complete():
            raise MissingLiveCertificateError(f"no issued certificate found in {source.path}")

        if self.matches_live(source):
            LOGGER.info("Serving certificate already matches %s", source.path)
            return self._require_bundle()

        try:
            fullchain_pem = source.fullchain_path.read_bytes()
            private_key_pem = source.private_key_path.read_bytes()
        except OSError as e:
            raise StorageError(f"cannot read live certificate in {source.path}: {e}") from e

        self._check_pair(source, fullchain_pem, private_key_pem)
        bundle = self.write_bundle(fullchain_pem, private_key_pem)
        LOGGER.info("Installed certificate for %s from %s", domain, source.path)
        return bundle

    @staticmethod
    def _check_pair(
        source: LiveCertificateDirectory, fullchain_pem: bytes, private_key_pem: bytes
    ) -> None:
        try:
            matches = public_key_matches(deserialize_certificate(fullchain_pem), private_key_pem)
        except (ValueError, TypeError) as e:
            raise MissingLiveCertificateError(
                f"live certificate in {source.path} is not readable PEM: {e}"
            ) from e
        if not matches:
            raise MissingLiveCertificateError(
                f"certificate and private key in {source.path} do not match",
                action="re-run issuance so the agent writes a consistent pair",
            )

    # ------------------ publication internals ------------------
    def _require_bundle(self) -> CertificateBundle:
        bundle = self.load_bundle()
        if bundle is None:
            raise StorageError(f"serving certificate missing in {self.certs_dir}")
        return bundle

    def _publish(self, fullchain_pem: bytes, private_key_pem: bytes) -> None:
        self.bundles_dir.mkdir(parents=True, exist_ok=True)
        self._adopt_legacy_pair()
        self._ensure_canonical_links()

        version_dir = self._new_version_dir()
        try:
            _write_file(version_dir / FULLCHAIN_NAME, fullchain_pem, 0o644)
            _write_file(version_dir / PRIVATE_KEY_NAME, private_key_pem, 0o600)
            _fsync_dir(version_dir)
            _replace_with_symlink(self.current_link, version_dir.name)
        except OSError:
            shutil.rmtree(version_dir, ignore_errors=True)
            raise
        _fsync_dir(self.bundles_dir)
        LOGGER.debug("Published certificate version %s", version_dir.name)
        self._prune_versions()

    def _new_version_dir(self) -> Path:
        stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        version_dir = self.bundles_dir / f"{stamp}-{uuid.uuid4().hex[:8]}"
        version_dir.mkdir(mode=0o755)
        return version_dir

    def _adopt_legacy_pair(self) -> None:
        """Move plain-file pairs from older layouts into a versioned directory."""
        if self.current_link.is_symlink():
            return
        legacy = [p for p in (self.fullchain_path, self.private_key_path) if not p.is_symlink()]
        if len(legacy) != 2 or not self.has_valid_bundle():
            return
        version_dir = self._new_version_dir()
        _write_file(version_dir / FULLCHAIN_NAME, self.fullchain_path.read_bytes(), 0o644)
        _write_file(version_dir / PRIVATE_KEY_NAME, self.private_key_path.read_bytes(), 0o600)
        _replace_with_symlink(self.current_link, version_dir.name)
        LOGGER.info("Adopted existing serving certificate as version %s", version_dir.name)

    def _ensure_canonical_links(self) -> None:
        for name in (FULLCHAIN_NAME, PRIVATE_KEY_NAME):
            link = self.certs_dir / name
            target = f"{BUNDLES_DIR_NAME}/{CURRENT_LINK_NAME}/{name}"
            if link.is_symlink() and os.readlink(link) == target:
                continue
            _replace_with_symlink(link, target)

    def _prune_versions(self) -> None:
        current = os.readlink(self.current_link)
        versions = sorted(
            p
            for p in self.bundles_dir.iterdir()
            if p.is_dir() and not p.is_symlink() and p.name != current
        )
        for stale in versions[: max(len(versions) - KEEP_PREVIOUS_VERSIONS, 0)]:
            shutil.rmtree(stale, ignore_errors=True)
            LOGGER.debug("Pruned certificate version %s", stale.name)
