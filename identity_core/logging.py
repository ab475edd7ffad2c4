from __future__ import annotations

import logging
import os
import re
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Echoed back to clients as X-Request-ID
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the current request context."""
    cid = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(cid)
    return cid


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    cid = get_correlation_id()
    if cid:
        event_dict["correlation_id"] = cid
    return event_dict


# Substrings of keys whose values are bearer credentials; codes and verifiers count
_REDACTED_KEYS = ("password", "secret", "token", "authorization", "verifier", "code", "cookie")
# Keys that name a credential without carrying one
_SAFE_KEYS = frozenset({"error_code", "status_code", "token_type", "grant_type", "code_challenge_method"})


def _redact_secrets(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Mask credential values, keeping two characters at each end for correlation."""
    for key, value in list(event_dict.items()):
        lower_key = key.lower()
        if lower_key in _SAFE_KEYS:
            continue
        if any(marker in lower_key for marker in _REDACTED_KEYS):
            if isinstance(value, str) and len(value) > 4:
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() in {"1", "true", "yes", "on"}


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Install the process-wide structlog pipeline.

    JSON lines by default; ``development_mode`` or ``json_output=False``
    switches to the colored console renderer.
    """
    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]
    if development_mode or not json_output:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))
    else:
        processors.extend([structlog.processors.format_exc_info, structlog.processors.JSONRenderer()])

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_configure_structlog(
    log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
    json_output=_env_flag("LOG_JSON", "true"),
    development_mode=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


# libpq and redis errors can echo back the DSN or conninfo they were given
_DSN_USERINFO = re.compile(r"(?i)\b(postgres(?:ql)?|rediss?)://[^\s/@]+@")
_CONNINFO_PASSWORD = re.compile(r"(?i)\b(password|sslpassword)\s*=\s*\S+")

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Mask credentials a database or cache driver echoed into an error message.

    Applied before a driver exception message is attached to a log line.
    """
    if not error or not isinstance(error, str):
        return "an error occurred"

    result = _DSN_USERINFO.sub(lambda m: f"{m.group(1)}://{replacement}@", error)
    result = _CONNINFO_PASSWORD.sub(lambda m: f"{m.group(1)}={replacement}", result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."
    return result
