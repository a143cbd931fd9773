"""Log the effective settings once at startup, secrets masked."""

from pydantic_settings import BaseSettings

from payroute.common.logging import logger

SECRET_MARKERS = ("secret", "password", "token", "key", "database_url")


def redacted_settings(config: BaseSettings) -> dict:
    values = config.model_dump()
    safe: dict = {}
    for name, value in values.items():
        if isinstance(value, dict) and "secret" in name:
            # Only reveal which providers have a secret configured.
            safe[name] = sorted(value)
        elif any(marker in name for marker in SECRET_MARKERS):
            safe[name] = "<redacted>" if value else "<unset>"
        else:
            safe[name] = value
    return safe


def log_startup_config(config: BaseSettings) -> None:
    logger.info("startup_config=%s", redacted_settings(config))
