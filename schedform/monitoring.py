import json
import logging
import os
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.logging import LoggingIntegration

_logger = logging.getLogger("schedform")
_initialized = False

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
# keys passed through ``extra=`` by the flow engine
STRUCTURED_KEYS = ("flow", "qualification", "reaper", "notification")


class FlowLogFormatter(logging.Formatter):
    """Appends structured ``extra`` payloads to the line as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = {key: getattr(record, key) for key in STRUCTURED_KEYS if hasattr(record, key)}
        if not extras:
            return line
        return f"{line} | {json.dumps(extras, default=str, sort_keys=True)}"


def init_monitoring() -> None:
    global _initialized
    if _initialized:
        return

    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(FlowLogFormatter(LOG_FORMAT))
    logging.basicConfig(level=getattr(logging, log_level, logging.INFO), handlers=[handler])

    dsn = os.getenv("SENTRY_DSN")
    if dsn:
        sentry_logging = LoggingIntegration(level=logging.INFO, event_level=logging.ERROR)
        sentry_sdk.init(
            dsn=dsn,
            integrations=[sentry_logging],
            traces_sample_rate=float(os.getenv("SENTRY_TRACES_SAMPLE_RATE", "0.0")),
            environment=os.getenv("SENTRY_ENVIRONMENT", os.getenv("ENVIRONMENT", "development")),
        )
        sentry_sdk.set_tag("service", "schedform")
        _logger.info("Sentry initialized")
    else:
        _logger.info("Sentry DSN not provided; skipping initialization")

    _initialized = True


def capture_exception(exc: BaseException, *, flow_id: Optional[str] = None) -> None:
    _logger.error("Exception captured (flow %s)", flow_id or "-", exc_info=exc)
    if not sentry_sdk.get_client().is_active():
        return
    with sentry_sdk.new_scope() as scope:
        if flow_id:
            scope.set_tag("flow_id", flow_id)
        sentry_sdk.capture_exception(exc)
