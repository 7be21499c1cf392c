"""Signal the running reverse proxy to pick up new certificate files."""

from .config import LifecycleConfig
from .errors import ReloadError
from .logging_config import LOGGER
from .process_control import ComposeRunner


class ReloadNotifier:
    """Graceful reload of the proxy service; installed files are never rolled back."""

    def __init__(self, config: LifecycleConfig, runner: ComposeRunner) -> None:
        self.config = config
        self.runner = runner

    def reload(self, service: str | None = None) -> None:
        """Validate the proxy configuration, then send the reload signal.

        Raises:
            ReloadError: If the proxy is not running, or the config test or
                reload command fails
        """
        service = service or self.config.proxy_service
        if not self.runner.is_running(service):
            raise ReloadError(f"reverse proxy service {service} is not running")

        if self.config.config_test_command:
            check = self.runner.exec(service, self.config.config_test_command)
            if not check.ok:
                raise ReloadError(
                    f"{service} rejected its configuration:\n{check.tail()}",
                    action="fix the proxy configuration, then reload; new certificates stay installed",
                )

        result = self.runner.exec(service, self.config.reload_command)
        if not result.ok:
            raise ReloadError(f"reload of {service} failed:\n{result.tail()}")
        LOGGER.info("Reloaded %s", service)
