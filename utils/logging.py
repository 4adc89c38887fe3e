"""Structured logging for the GPS tracking scrapers.

Two streams are configured on import:

* the structlog event stream (stdout plus ``gps-tracking.log``), one JSON
  event per line with the bound operator context;
* the audit log (``tracking-audit.jsonl``), written through python-json-logger
  and reserved for entries that must outlive the run: logins, selections,
  rejected credentials and every error.
"""

import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import structlog
from pythonjsonlogger import jsonlogger

from config import get_settings, get_logs_dir

AUDIT_LOGGER_NAME = "tracking.audit"
AUDIT_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
QUIET_LOGGERS = ("playwright", "asyncio", "prefect.events")

_RESERVED_RECORD_KEYS = set(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

SHARED_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
]


def _configure_audit_logger(logs_dir: Path) -> logging.Logger:
    audit = logging.getLogger(AUDIT_LOGGER_NAME)
    if not audit.handlers:
        handler = logging.FileHandler(logs_dir / "tracking-audit.jsonl", encoding="utf-8")
        handler.setFormatter(jsonlogger.JsonFormatter(AUDIT_FORMAT))
        audit.addHandler(handler)
    audit.setLevel(logging.DEBUG)
    audit.propagate = False
    return audit


def configure_logging() -> None:
    """Configure structlog, the stdlib root handlers and the audit logger."""
    settings = get_settings()
    logs_dir = get_logs_dir()

    structlog.configure(
        processors=SHARED_PROCESSORS + [structlog.processors.JSONRenderer(ensure_ascii=False)],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(message)s",
        handlers=[
            logging.StreamHandler(sys.stdout),
            logging.FileHandler(logs_dir / "gps-tracking.log", encoding="utf-8"),
        ],
    )
    _configure_audit_logger(logs_dir)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str) -> structlog.BoundLogger:
    """Get a structured logger instance."""
    return structlog.get_logger(name)


class ScrapingLogger:
    """Scraper logger tagged with operator identity, origin IP and a context label.

    Entries logged with ``persist=True`` (and every error) are also written to
    the audit log. Audit delivery problems are reported but never raised.
    """

    def __init__(
        self,
        name: str,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        context: Optional[str] = None,
    ):
        self.name = name
        self.context: Dict[str, Any] = {
            key: value
            for key, value in (("user_id", user_id), ("ip", ip_address), ("context", context))
            if value
        }
        self.logger = get_logger(name).bind(**self.context)

    def bind(self, **kwargs: Any) -> "ScrapingLogger":
        """Return a copy carrying extra context, e.g. the plate being located."""
        bound = ScrapingLogger(self.name)
        bound.context = {**self.context, **kwargs}
        bound.logger = get_logger(self.name).bind(**bound.context)
        return bound

    def debug(self, message: str, **kwargs: Any) -> None:
        self.logger.debug(message, **kwargs)

    def info(self, message: str, persist: bool = False, **kwargs: Any) -> None:
        self.logger.info(message, **kwargs)
        if persist:
            self._persist(logging.INFO, message, kwargs)

    def warning(self, message: str, persist: bool = False, **kwargs: Any) -> None:
        self.logger.warning(message, **kwargs)
        if persist:
            self._persist(logging.WARNING, message, kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        """Errors always reach the audit log."""
        self.logger.error(message, **kwargs)
        self._persist(logging.ERROR, message, kwargs)

    def critical(self, message: str, **kwargs: Any) -> None:
        self.logger.critical(message, **kwargs)
        self._persist(logging.CRITICAL, message, kwargs)

    def action(self, action: str, **kwargs: Any) -> None:
        """Record an operator-visible scraping action."""
        self.logger.info("scraper_action", action=action, **kwargs)

    def _persist(self, level: int, message: str, fields: Dict[str, Any]) -> None:
        # LogRecord attributes cannot be overwritten through ``extra``
        extra = {
            (f"field_{k}" if k in _RESERVED_RECORD_KEYS else k): str(v)
            for k, v in {**self.context, **fields}.items()
        }
        try:
            logging.getLogger(AUDIT_LOGGER_NAME).log(level, message, extra=extra)
        except Exception as e:
            self.logger.warning("audit_log_delivery_failed", error=str(e))


configure_logging()
