"""Tests for CertificateStore."""

import os
import stat
from collections.abc import Callable
from pathlib import Path

import pytest
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

from cert_lifecycle.lib.cert_utils import serialize_private_key
from cert_lifecycle.lib.certificate_store import CertificateStore
from cert_lifecycle.lib.config import LifecycleConfig
from cert_lifecycle.lib.errors import MissingLiveCertificateError, StorageError
from cert_lifecycle.lib.models import Issuer, LiveCertificateDirectory

LiveWriter = Callable[..., LiveCertificateDirectory]


class TestEnsureDirectories:
    """Tests for ensure_directories()."""

    def test_creates_webroot_logs_and_certs(self, lifecycle_config: LifecycleConfig) -> None:
        """Should create webroot, logs and certs directories."""
        store = CertificateStore(lifecycle_config)
        store.ensure_directories()

        assert lifecycle_config.webroot_dir.is_dir()
        assert lifecycle_config.logs_dir.is_dir()
        assert lifecycle_config.certs_dir.is_dir()

    def test_idempotent(self, lifecycle_config: LifecycleConfig) -> None:
        """Should succeed when directories already exist."""
        store = CertificateStore(lifecycle_config)
        store.ensure_directories()
        store.ensure_directories()
        assert lifecycle_config.certs_dir.is_dir()

    def test_blocked_path_raises_storage_error(self, tmp_path: Path) -> None:
        """A regular file where a directory is expected cannot be created over."""
        (tmp_path / "nginx").write_text("not a directory")
        store = CertificateStore(LifecycleConfig(project_dir=tmp_path))

        with pytest.raises(StorageError, match="cannot create directory"):
            store.ensure_directories()


class TestHasValidBundle:
    """Tests for has_valid_bundle()."""

    def test_false_when_missing(self, store: CertificateStore) -> None:
        """Should return False when neither file exists."""
        assert store.has_valid_bundle() is False

    def test_false_when_only_one_file(self, store: CertificateStore) -> None:
        """Should return False when the key is missing."""
        store.fullchain_path.write_bytes(b"cert")
        assert store.has_valid_bundle() is False

    def test_false_when_a_file_is_empty(self, store: CertificateStore) -> None:
        """Should return False when a file is empty."""
        store.fullchain_path.write_bytes(b"cert")
        store.private_key_path.write_bytes(b"")
        assert store.has_valid_bundle() is False

    def test_true_when_both_non_empty(self, store: CertificateStore) -> None:
        """Content is not parsed: existence and size decide."""
        store.fullchain_path.write_bytes(b"cert")
        store.private_key_path.write_bytes(b"key")
        assert store.has_valid_bundle() is True

    def test_explicit_directory(self, store: CertificateStore, tmp_path: Path) -> None:
        """Should check the given directory instead of certs_dir."""
        other = tmp_path / "elsewhere"
        other.mkdir()
        (other / "fullchain.pem").write_bytes(b"cert")
        (other / "privkey.pem").write_bytes(b"key")
        assert store.has_valid_bundle(other) is True
        assert store.has_valid_bundle() is False


class TestInstallBundle:
    """Tests for install_bundle()."""

    def test_copies_live_pair_to_canonical_path(
        self, store: CertificateStore, write_live: LiveWriter
    ) -> None:
        """Should publish the live pair as the serving pair."""
        live = write_live("a.example")

        bundle = store.install_bundle(live, "a.example")

        assert store.fullchain_path.read_bytes() == live.fullchain_path.read_bytes()
        assert store.private_key_path.read_bytes() == live.private_key_path.read_bytes()
        assert bundle.domain == "a.example"
        assert bundle.issuer is Issuer.ACME_PRODUCTION

    def test_private_key_owner_only(self, store: CertificateStore, write_live: LiveWriter) -> None:
        """Should restrict the installed key to the owner."""
        store.install_bundle(write_live("a.example"), "a.example")

        mode = stat.S_IMODE(os.stat(store.private_key_path).st_mode)
        assert mode == 0o600

    def test_missing_live_directory(self, store: CertificateStore) -> None:
        """Should raise MissingLiveCertificateError for an absent live dir."""
        live = store.live_directory("a.example")
        with pytest.raises(MissingLiveCertificateError, match="no issued certificate"):
            store.install_bundle(live, "a.example")

    def test_empty_live_directory(self, store: CertificateStore) -> None:
        """Agent exit 0 with an empty live dir is a distinct failure, not an I/O error."""
        live = store.live_directory("a.example")
        live.path.mkdir(parents=True)

        with pytest.raises(MissingLiveCertificateError):
            store.install_bundle(live, "a.example")

    def test_live_directory_for_other_domain(
        self, store: CertificateStore, write_live: LiveWriter
    ) -> None:
        """Should refuse a live directory issued for another domain."""
        live = write_live("b.example")
        with pytest.raises(MissingLiveCertificateError, match="belongs to b.example"):
            store.install_bundle(live, "a.example")

    def test_reinstall_is_noop(self, store: CertificateStore, write_live: LiveWriter) -> None:
        """Installing the same live pair twice does not publish a new version."""
        live = write_live("a.example")
        store.install_bundle(live, "a.example")
        current = os.readlink(store.current_link)

        store.install_bundle(live, "a.example")

        assert os.readlink(store.current_link) == current

    def test_mismatched_live_pair(
        self, store: CertificateStore, write_live: LiveWriter, ca_key: RSAPrivateKey
    ) -> None:
        """A key that does not belong to the certificate is never published."""
        live = write_live("a.example")
        live.private_key_path.write_bytes(serialize_private_key(ca_key))

        with pytest.raises(MissingLiveCertificateError, match="do not match"):
            store.install_bundle(live, "a.example")
        assert store.has_valid_bundle() is False

    def test_unreadable_live_pair(self, store: CertificateStore, write_live: LiveWriter) -> None:
        """Should refuse a live pair that is not PEM."""
        live = write_live("a.example")
        live.private_key_path.write_bytes(b"garbage")

        with pytest.raises(MissingLiveCertificateError, match="not readable PEM"):
            store.install_bundle(live, "a.example")

    def test_alternative_names_share_primary_live_directory(
        self, store: CertificateStore, write_live: LiveWriter
    ) -> None:
        """Installing a.example reads only live/a.example."""
        live = write_live("a.example", ["b.example"])
        other = write_live("b.example")
        before = other.fullchain_path.read_bytes()

        bundle = store.install_bundle(live, "a.example")

        assert bundle.alternative_names == ["b.example"]
        assert other.fullchain_path.read_bytes() == before


class TestAtomicPublication:
    """Canonical pair is always a complete old or new pair."""

    def test_canonical_files_are_links_into_current(
        self, store: CertificateStore, write_live: LiveWriter
    ) -> None:
        """Should expose the pair through links into current."""
        store.install_bundle(write_live("a.example"), "a.example")

        assert store.fullchain_path.is_symlink()
        assert os.readlink(store.fullchain_path) == ".bundles/current/fullchain.pem"
        assert os.readlink(store.private_key_path) == ".bundles/current/privkey.pem"

    def test_interrupted_swap_keeps_old_pair(
        self,
        store: CertificateStore,
        write_live: LiveWriter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Failure after staging but before the final rename leaves the old pair intact."""
        store.install_bundle(write_live("a.example"), "a.example")
        old_chain = store.fullchain_path.read_bytes()
        old_key = store.private_key_path.read_bytes()
        new_live = write_live("a.example", ["b.example"])

        real_replace = os.replace

        def interrupted_replace(src, dst):
            if Path(dst) == store.current_link:
                raise OSError("interrupted")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", interrupted_replace)

        with pytest.raises(StorageError, match="interrupted"):
            store.install_bundle(new_live, "a.example")

        assert store.fullchain_path.read_bytes() == old_chain
        assert store.private_key_path.read_bytes() == old_key

    def test_interrupted_swap_leaves_no_staged_version(
        self,
        store: CertificateStore,
        write_live: LiveWriter,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        """Should remove the staged version when the swap fails."""
        store.install_bundle(write_live("a.example"), "a.example")
        versions_before = sorted(p.name for p in store.bundles_dir.iterdir())
        new_live = write_live("a.example", ["b.example"])
        real_replace = os.replace

        def interrupted_replace(src, dst):
            if Path(dst) == store.current_link:
                raise OSError("interrupted")
            return real_replace(src, dst)

        monkeypatch.setattr(os, "replace", interrupted_replace)
        with pytest.raises(StorageError):
            store.install_bundle(new_live, "a.example")

        assert sorted(p.name for p in store.bundles_dir.iterdir()) == versions_before

    def test_adopts_legacy_regular_files(
        self, store: CertificateStore, write_live: LiveWriter
    ) -> None:
        """Plain files from an older layout are kept as the previous version."""
        store.fullchain_path.write_bytes(b"old-cert")
        store.private_key_path.write_bytes(b"old-key")

        store.install_bundle(write_live("a.example"), "a.example")

        versions = [p for p in store.bundles_dir.iterdir() if p.is_dir() and not p.is_symlink()]
        assert len(versions) == 2
        assert any((v / "fullchain.pem").read_bytes() == b"old-cert" for v in versions)

    def test_prunes_to_current_and_previous(
        self, store: CertificateStore, write_live: LiveWriter
    ) -> None:
        """Should keep only the current and previous versions."""
        for _ in range(4):
            store.install_bundle(write_live("a.example"), "a.example")

        versions = [p for p in store.bundles_dir.iterdir() if p.is_dir() and not p.is_symlink()]
        assert len(versions) == 2


class TestLiveDirectories:
    """Tests for live directory helpers."""

    def test_live_directory_path(self, store: CertificateStore) -> None:
        """Should place live directories under certs/live."""
        live = store.live_directory("a.example")
        assert live == LiveCertificateDirectory(
            domain="a.example", path=store.config.certs_dir / "live" / "a.example"
        )

    def test_live_domains(self, store: CertificateStore, write_live: LiveWriter) -> None:
        """Should list only domain directories, sorted."""
        write_live("b.example")
        write_live("a.example")
        (store.config.live_dir / "README").write_text("certbot readme")

        assert store.live_domains() == ["a.example", "b.example"]

    def test_matches_live(self, store: CertificateStore, write_live: LiveWriter) -> None:
        """Should match only after the live pair is installed."""
        live = write_live("a.example")
        assert store.matches_live(live) is False
        store.install_bundle(live, "a.example")
        assert store.matches_live(live) is True
