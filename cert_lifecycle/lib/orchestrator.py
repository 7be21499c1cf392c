"""Lifecycle orchestrator: Bootstrap -> Serve -> Issue/Renew -> Install -> Reload."""

from collections.abc import Callable
from typing import TypeVar

from .acme_client import AcmeClient
from .bootstrap import ServingBootstrap
from .certificate_store import CertificateStore
from .config import LifecycleConfig
from .errors import AgentUnavailable, CertLifecycleError, MissingLiveCertificateError
from .logging_config import LOGGER
from .models import (
    CertificateBundle,
    IssuanceRequest,
    LifecycleResult,
    LifecycleState,
    LiveCertificateDirectory,
)
from .process_control import ComposeRunner
from .reload_notifier import ReloadNotifier

T = TypeVar("T")


class LifecycleOrchestrator:
    """Sequences the lifecycle steps for one invocation.

    Any taxonomy error moves the run to FAILED and is re-raised; nothing that
    was already installed is rolled back. Re-running from IDLE repeats only
    the steps whose existence checks are not yet satisfied.
    """

    def __init__(
        self,
        config: LifecycleConfig,
        store: CertificateStore,
        bootstrap: ServingBootstrap,
        acme: AcmeClient,
        runner: ComposeRunner,
        notifier: ReloadNotifier,
    ) -> None:
        self.config = config
        self.store = store
        self.bootstrap_step = bootstrap
        self.acme = acme
        self.runner = runner
        self.notifier = notifier
        self.state = LifecycleState.IDLE
        self.history: list[LifecycleState] = [LifecycleState.IDLE]
        self.failure: CertLifecycleError | None = None

    @classmethod
    def from_config(cls, config: LifecycleConfig) -> "LifecycleOrchestrator":
        """Wire the default collaborators for ``config``."""
        store = CertificateStore(config)
        runner = ComposeRunner(config)
        return cls(
            config=config,
            store=store,
            bootstrap=ServingBootstrap(config, store),
            acme=AcmeClient(config, runner),
            runner=runner,
            notifier=ReloadNotifier(config, runner),
        )

    # ------------------ state bookkeeping ------------------
    def _reset(self) -> None:
        self.state = LifecycleState.IDLE
        self.history = [LifecycleState.IDLE]
        self.failure = None

    def _advance(self, state: LifecycleState) -> None:
        LOGGER.info("Lifecycle: %s -> %s", self.state.value, state.value)
        self.state = state
        self.history.append(state)

    def _fail(self, error: CertLifecycleError) -> None:
        self.failure = error
        self.history.append(LifecycleState.FAILED)
        LOGGER.error("Lifecycle failed in state %s: %s", self.state.value, error.message)
        self.state = LifecycleState.FAILED

    def _guard(self, action: Callable[[], T]) -> T:
        try:
            return action()
        except CertLifecycleError as e:
            self._fail(e)
            raise

    def _step(self, target: LifecycleState, action: Callable[[], T]) -> T:
        value = self._guard(action)
        self._advance(target)
        return value

    def _result(
        self, bundle: CertificateBundle | None = None, **kwargs
    ) -> LifecycleResult:
        return LifecycleResult(
            state=self.state,
            history=list(self.history),
            bundle=bundle,
            failure=self.failure,
            **kwargs,
        )

    # ------------------ individual steps ------------------
    def _bootstrap(
        self,
        domain: str,
        extra_names: list[str] | tuple[str, ...] = (),
        days: int | None = None,
        force: bool = False,
    ) -> CertificateBundle | None:
        def action() -> CertificateBundle | None:
            self.store.ensure_directories()
            return self.bootstrap_step.ensure_bootstrap_certificate(
                domain, extra_names=extra_names, days=days, force=force
            ).bundle

        return self._step(LifecycleState.BOOTSTRAPPED, action)

    def _serve(self) -> None:
        def action() -> None:
            service = self.config.proxy_service
            self.runner.check_available()
            started = not self.runner.is_running(service)
            if started:
                LOGGER.info("Starting reverse proxy %s for ACME validation", service)
                self.runner.start(service)
            else:
                LOGGER.info("Reverse proxy %s already running", service)
            tcp_check = (
                (self.config.ready_host, self.config.ready_port)
                if self.config.ready_host
                else None
            )
            try:
                self.runner.wait_until_ready(service, self.config.startup_timeout, tcp_check=tcp_check)
            except AgentUnavailable:
                if started:
                    LOGGER.warning("Stopping %s, which never became ready", service)
                    self.runner.stop(service)
                raise

        self._step(LifecycleState.SERVING, action)

    def _install(self, live: LiveCertificateDirectory, domain: str) -> CertificateBundle:
        return self._step(
            LifecycleState.INSTALLED, lambda: self.store.install_bundle(live, domain)
        )

    def _reload(self) -> None:
        self._step(LifecycleState.RELOADED, self.notifier.reload)

    # ------------------ operations ------------------
    def bootstrap(
        self,
        domain: str,
        extra_names: list[str] | tuple[str, ...] = (),
        days: int | None = None,
        force: bool = False,
    ) -> LifecycleResult:
        """Idle -> Bootstrapped only."""
        self._reset()
        bundle = self._bootstrap(domain, extra_names, days, force)
        return self._result(bundle)

    def issue(self, request: IssuanceRequest) -> LifecycleResult:
        """Run the full issuance chain for ``request``, ending in RELOADED.

        Args:
            request: Validated issuance request

        Returns:
            LifecycleResult with the installed bundle

        Raises:
            CertLifecycleError: Whichever step failed; state is FAILED
        """
        self._reset()
        # Placeholder only lives until the ACME pair is installed
        self._bootstrap(request.primary_domain, request.alternative_names, days=1)
        self._serve()
        self._advance(LifecycleState.VALIDATING)
        live = self._step(LifecycleState.ISSUED, lambda: self.acme.issue(request))
        bundle = self._install(live, request.primary_domain)
        self._reload()
        return self._result(bundle)

    def renew(self, domain: str) -> LifecycleResult:
        """Renew due certificates and install the one for ``domain``.

        When nothing was due and the serving pair already matches
        ``live/<domain>``, the run stops in VALIDATING without touching the
        filesystem. A mismatch (an earlier install never completed) is
        repaired by installing and reloading anyway.

        Raises:
            MissingLiveCertificateError: If ``domain`` was never issued
            CertLifecycleError: Whichever step failed; state is FAILED
        """
        self._reset()
        live = self.store.live_directory(domain)
        if not live.is_complete():
            issued = ", ".join(self.store.live_domains()) or "none"
            error = MissingLiveCertificateError(
                f"no issued certificate to renew in {live.path}",
                action=f"issue a certificate for {domain} first (issued: {issued})",
            )
            self._fail(error)
            raise error

        self._bootstrap(domain)
        self._serve()
        self._advance(LifecycleState.VALIDATING)
        renewal = self._guard(self.acme.renew)
        renewed_here = any(d.domain == domain for d in renewal.renewed)

        if not renewed_here and self._guard(lambda: self.store.matches_live(live)):
            LOGGER.info("Certificate for %s not due for renewal; nothing to install", domain)
            return self._result(self._guard(self.store.load_bundle), renewal=renewal)

        self._advance(LifecycleState.ISSUED)
        bundle = self._install(live, domain)
        self._reload()
        return self._result(bundle, renewal=renewal)
