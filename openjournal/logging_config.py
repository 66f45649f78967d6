"""
Structured logging for the voice client and the backend proxy.

Both processes log through structlog on top of stdlib logging, so uvicorn,
aiohttp and websockets records share one renderer. Every record carries the
service name, the emitting module and, while a journaling session is live,
its session id as ``correlation_id``. Credentials (OpenRouter and ElevenLabs
keys, single-use realtime tokens, Authorization headers) are masked before
rendering.

Logs go to stderr so the terminal session can keep stdout for transcript
lines.
"""

import contextvars
import logging
import os
import sys
import uuid
from logging.handlers import RotatingFileHandler
from typing import Any, Dict, Optional

import structlog

SERVICE_NAME = "openjournal"
REDACTED = "***REDACTED***"

correlation_id_var: contextvars.ContextVar = contextvars.ContextVar("correlation_id", default=None)

# Compared after lowercasing and removing "_" / "-"; a field is secret when its
# normalized name equals or ends with one of these.
_SECRET_SUFFIXES = (
    "apikey",
    "apikeys",
    "token",
    "accesstoken",
    "authorization",
    "auth",
    "bearer",
    "password",
    "passwd",
    "pwd",
    "pass",
    "secret",
    "secrets",
    "credential",
    "credentials",
    "privatekey",
)

_NOISY_LOGGERS = ("websockets", "aiohttp", "asyncio", "httpx", "httpcore", "uvicorn.access")


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(value: Optional[str] = None) -> str:
    """Bind ``value`` (a fresh id when omitted) to the current context."""
    value = value or uuid.uuid4().hex[:12]
    correlation_id_var.set(value)
    return value


def add_correlation_id(logger, method_name, event_dict):
    correlation_id = get_correlation_id()
    if correlation_id:
        event_dict["correlation_id"] = correlation_id
    return event_dict


def add_service_context(logger, method_name, event_dict):
    event_dict["service"] = SERVICE_NAME
    event_dict.setdefault("component", event_dict.get("logger") or getattr(logger, "name", None) or "unknown")
    return event_dict


def is_secret_field(name: Any) -> bool:
    normalized = str(name).lower().replace("_", "").replace("-", "")
    return any(normalized == s or normalized.endswith(s) for s in _SECRET_SUFFIXES)


def mask_secret(value: Any) -> Any:
    """Mask a secret value; strings keep two leading characters to tell keys apart."""
    if value is None or value == "" or isinstance(value, bool):
        return value
    if isinstance(value, dict):
        return {k: mask_secret(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [mask_secret(v) for v in value]
    if isinstance(value, str) and len(value) > 4:
        return value[:2] + REDACTED
    return REDACTED


def _scrub(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: mask_secret(v) if is_secret_field(k) else _scrub(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_scrub(v) for v in value]
    return value


def sanitize_secrets(logger, method_name, event_dict: Dict[str, Any]) -> Dict[str, Any]:
    """structlog processor masking credential fields at any nesting depth."""
    return _scrub(event_dict)


def _resolve_level(level: Any) -> int:
    if isinstance(level, int):
        return level
    return getattr(logging, str(level).upper(), logging.INFO)


def configure_logging(
    log_level: Any = "INFO",
    log_format: str = "console",
    log_file: Optional[str] = None,
) -> None:
    """
    Set up structlog and the root stdlib logger.

    Environment variables win over the arguments:
      - LOG_LEVEL: debug|info|warning|error|critical
      - LOG_FORMAT: console|json
      - LOG_FILE: path of a rotating log file (10 MB x 5)
      - LOG_COLOR: 0 disables console colors
    """
    level = _resolve_level(os.getenv("LOG_LEVEL") or log_level)
    log_format = (os.getenv("LOG_FORMAT") or log_format or "console").strip().lower()
    log_file = os.getenv("LOG_FILE") or log_file
    colors = os.getenv("LOG_COLOR", "1").strip().lower() not in ("0", "false", "no")

    shared = [
        structlog.stdlib.add_logger_name,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
    ]

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            *shared,
            add_service_context,
            add_correlation_id,
            sanitize_secrets,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    if log_format == "json":
        renderer = structlog.processors.JSONRenderer()
    else:
        renderer = structlog.dev.ConsoleRenderer(colors=colors)
    formatter = structlog.stdlib.ProcessorFormatter(processor=renderer, foreign_pre_chain=shared)

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(level)

    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    root.addHandler(stderr_handler)

    if log_file:
        try:
            directory = os.path.dirname(log_file)
            if directory:
                os.makedirs(directory, exist_ok=True)
            file_handler = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        except OSError as e:
            structlog.get_logger(__name__).warning("File logging disabled", path=log_file, error=str(e))
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str):
    return structlog.get_logger(name)
