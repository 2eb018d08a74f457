import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

from redemption_app.core.config import Settings

# set per HTTP request by RequestIdMiddleware
request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class ContextFilter(logging.Filter):
    """Stamps every record with the service environment and the current request id."""

    def __init__(self, environment: str):
        super().__init__()
        self.environment = environment

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = request_id_ctx.get()
        record.environment = self.environment
        return True


def configure_logging(settings: Settings) -> None:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        jsonlogger.JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s %(request_id)s %(environment)s",
            rename_fields={"levelname": "level", "name": "logger"},
        )
    )
    handler.addFilter(ContextFilter(settings.environment))

    root = logging.getLogger()
    # replace our own handler on re-configure, leave foreign ones (pytest caplog) alone
    for existing in list(root.handlers):
        if getattr(existing, "_redemption_json", False):
            root.removeHandler(existing)
    handler._redemption_json = True
    root.addHandler(handler)
    root.setLevel(level)

    for name in ("uvicorn.access", "uvicorn.error"):
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
