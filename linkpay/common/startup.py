"""Log the effective configuration once at startup, with secrets masked."""

from sqlalchemy.engine import make_url
from sqlalchemy.exc import ArgumentError

from linkpay.common.config import Settings
from linkpay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token")


def _redact(name: str, value):
    if value in ("", None):
        return "<unset>"
    if name.endswith("_url") and isinstance(value, str) and "://" in value:
        try:
            return make_url(value).render_as_string(hide_password=True)
        except ArgumentError:
            return "<redacted>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    return value


def safe_config(settings: Settings, fields: list[str]) -> dict:
    """Selected settings with credentials removed from URLs and secrets hidden."""

    return {name: _redact(name, getattr(settings, name)) for name in fields}


def log_startup_config(settings: Settings, fields: list[str]) -> None:
    config = {"service": settings.service_name, **safe_config(settings, fields)}
    logger.info("startup_config=%s", config)
