import logging
import os
from typing import Any

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

_configured = False


def _level_from_env() -> int:
    name = os.getenv("LOG_LEVEL")
    if name:
        return getattr(logging, name.upper(), logging.INFO)
    return logging.DEBUG if os.getenv("DEBUG") == "1" else logging.INFO


def configure_logging(level: int | None = None) -> None:
    """Configure the root logger once per process."""
    global _configured
    if _configured:
        return
    logging.basicConfig(level=level if level is not None else _level_from_env(), format=LOG_FORMAT)
    _configured = True


def get_logger(name: str | None = None) -> logging.Logger:
    configure_logging()
    return logging.getLogger(name or "gateway")


# Credentials, signed material and shipping PII. Matched case-insensitively.
_SECRET_KEYS = frozenset(
    {
        "api_key",
        "authorization",
        "productblob",
        "secret",
        "signature",
        "x-api-key",
    }
)
_PII_KEYS = frozenset({"email", "phone", "physicaladdress", "line1", "line2"})
_PAYMENT_HEADER_PREFIXES = ("x-payment", "payment-")
_SECRET_SUFFIXES = ("_api_key", "_secret", "_signature", "_token")


def is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return (
        lowered in _SECRET_KEYS
        or lowered in _PII_KEYS
        or lowered.startswith(_PAYMENT_HEADER_PREFIXES)
        or lowered.endswith(_SECRET_SUFFIXES)
    )


def redact(value: Any, *, sensitive: bool = False) -> Any:
    """Copy *value* with every string under a sensitive key replaced by its length."""
    if isinstance(value, dict):
        return {
            key: redact(item, sensitive=sensitive or is_sensitive_key(str(key)))
            for key, item in value.items()
        }
    if isinstance(value, (list, tuple)):
        return type(value)(redact(item, sensitive=sensitive) for item in value)
    if isinstance(value, str):
        return f"<redacted:{len(value)} chars>" if sensitive else value
    if isinstance(value, (bytes, bytearray)):
        return f"<redacted:bytes:{len(value)}>" if sensitive else f"<bytes:{len(value)}>"
    return value


def mask_secret(value: str | None, visible: int = 6) -> str:
    if not value:
        return "NOT SET"
    return "***" + value[-visible:]


def log_json(logger: logging.Logger, level: int, message: str, data: Any) -> None:
    if logger.isEnabledFor(level):
        logger.log(level, "%s: %s", message, redact(data))


def log_asin_flow(
    logger: logging.Logger,
    request_id: str,
    step: str,
    level: int = logging.INFO,
    **fields: Any,
) -> None:
    """Trace one step of an identifier through a purchase, keyed by request id."""
    if logger.isEnabledFor(level):
        details = " ".join(f"{key}={value!r}" for key, value in fields.items())
        logger.log(level, "[ASIN-Flow] %s %s: %s", request_id, step, details)
