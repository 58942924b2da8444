"""Startup-time helpers for safe config logging."""

from sqlalchemy.engine import make_url

from gatherpay.common.config import CommonSettings
from gatherpay.common.logging import logger

SECRET_MARKERS = ("key", "secret", "password", "token")


def _safe_value(name: str, value: object) -> str:
    """Render one resolved setting with secrets hidden; DSNs keep everything but the password."""

    if value is None:
        return "<unset>"
    if any(marker in name for marker in SECRET_MARKERS):
        return "<redacted>"
    if name.endswith("_dsn") or name == "redis_url":
        return make_url(str(value)).render_as_string(hide_password=True)
    return str(value)


def log_startup_config(config: CommonSettings, fields: list[str]) -> dict[str, str]:
    """Log the resolved values of selected settings for quick troubleshooting."""

    rendered = {"service": config.service_name}
    rendered.update({name: _safe_value(name, getattr(config, name, None)) for name in fields})
    logger.info("startup_config=%s", rendered)
    return rendered
