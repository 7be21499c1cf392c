"""JSON logging for certctl runs.

Every record carries the subcommand being run, so interleaved output from
scheduled ``renew`` jobs and manual ``issue`` runs can be told apart.
"""

import logging
import sys

from pythonjsonlogger import jsonlogger

LOGGER_NAME = "cert_lifecycle"

LOG_FIELDS = frozenset(
    {"timestamp", "level", "command", "message", "exc_info", "funcName", "lineno"}
)


class CustomJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter restricted to LOG_FIELDS."""

    def add_fields(self, log_record, record, message_dict):
        """Rename levelname to level and drop fields outside LOG_FIELDS.

        Args:
            log_record: Dict to be logged as JSON
            record: LogRecord object from logging framework
            message_dict: Dict containing message and args
        """
        super().add_fields(log_record, record, message_dict)
        if "levelname" in log_record:
            log_record["level"] = log_record.pop("levelname")
        for key in [key for key in log_record if key not in LOG_FIELDS]:
            del log_record[key]


class CommandFilter(logging.Filter):
    """Stamps records with the active subcommand."""

    def __init__(self) -> None:
        super().__init__()
        self.command: str | None = None

    def filter(self, record: logging.LogRecord) -> bool:
        if self.command and not hasattr(record, "command"):
            record.command = self.command
        return True


COMMAND_FILTER = CommandFilter()


def _setup_logger() -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)

    # Module reloads must not stack handlers
    if logger.handlers:
        return logger

    handler = logging.StreamHandler(sys.stderr)
    handler.addFilter(COMMAND_FILTER)
    handler.setFormatter(
        CustomJsonFormatter(
            fmt="%(timestamp)s %(levelname)s %(funcName)s %(lineno)d %(message)s",
            timestamp=True,
        )
    )
    logger.setLevel(logging.INFO)
    logger.addHandler(handler)
    logger.propagate = False
    return logger


def configure(verbose: bool = False, command: str | None = None) -> None:
    """Set the level (DEBUG logs every external command) and the command tag."""
    LOGGER.setLevel(logging.DEBUG if verbose else logging.INFO)
    COMMAND_FILTER.command = command


LOGGER = _setup_logger()
