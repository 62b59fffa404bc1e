import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

_FAILURE_LOGGER_NAME = "qos_library.failures"
_handlers: Dict[Path, RotatingFileHandler] = {}


class JsonFormatter(logging.Formatter):
    """One JSON object per line."""

    def format(self, record):
        log_record = {
            "timestamp": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "message": record.msg if isinstance(record.msg, dict) else record.getMessage(),
        }
        return json.dumps(log_record)


def setup_failure_logger(log_dir: Path) -> Optional[logging.Logger]:
    """Sets up a dedicated JSON logger for failed CLI invocations."""
    log_dir = Path(log_dir)
    logger = logging.getLogger(_FAILURE_LOGGER_NAME)
    logger.setLevel(logging.INFO)

    # Keep failures out of the hook's stdout/stderr
    logger.propagate = False

    if log_dir not in _handlers:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            # Use a rotating file handler to keep log files from growing too large
            handler = RotatingFileHandler(
                log_dir / "failures.log",
                maxBytes=5 * 1024 * 1024,  # 5 MB
                backupCount=2,
                encoding="utf-8",
            )
        except OSError as e:
            logging.getLogger("qos_library").debug(
                f"Failure log unavailable in {log_dir}: {e}"
            )
            return None
        handler.setFormatter(JsonFormatter())
        _handlers[log_dir] = handler

    handler = _handlers[log_dir]
    for existing in list(logger.handlers):
        if existing is not handler:
            logger.removeHandler(existing)
    if handler not in logger.handlers:
        logger.addHandler(handler)
    return logger


def log_failure(
    log_dir: Path,
    provider: str,
    account_id: str,
    kind: str,
    error_text: Optional[Any],
    **details: Any,
) -> None:
    """Logs a structured message for a failed CLI invocation."""
    logger = setup_failure_logger(log_dir)
    if logger is None:
        return

    log_data = {
        "provider": provider,
        "account_id": account_id,
        "failure_kind": kind,
        "error_message": str(error_text or "")[:500],
        **details,
    }
    logger.error(log_data)
