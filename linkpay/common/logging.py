"""Structured JSON logging with request/link context fields."""

import logging
import sys
from contextvars import ContextVar

from pythonjsonlogger.json import JsonFormatter

from linkpay.common.config import settings


trace_id_ctx: ContextVar[str] = ContextVar("trace_id", default="")
merchant_id_ctx: ContextVar[str] = ContextVar("merchant_id", default="")
payment_link_id_ctx: ContextVar[str] = ContextVar("payment_link_id", default="")


class ContextFilter(logging.Filter):
    """Inject service and correlation identifiers into every log record."""

    def __init__(self, service_name: str) -> None:
        super().__init__()
        self.service_name = service_name

    def filter(self, record: logging.LogRecord) -> bool:
        record.service_name = self.service_name
        record.trace_id = trace_id_ctx.get()
        record.merchant_id = merchant_id_ctx.get()
        record.payment_link_id = payment_link_id_ctx.get()
        return True


def configure_logging(service_name: str | None = None, level: str | None = None) -> None:
    """Configure root logger once per service process."""

    handler = logging.StreamHandler(sys.stdout)
    context_filter = ContextFilter(service_name or settings.service_name)
    handler.addFilter(context_filter)
    formatter = JsonFormatter(
        "%(asctime)s %(levelname)s %(service_name)s %(trace_id)s %(merchant_id)s %(payment_link_id)s %(message)s"
    )
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level or settings.log_level)


logger = logging.getLogger("linkpay")
