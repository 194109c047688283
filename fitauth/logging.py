from __future__ import annotations

import logging
import os
import uuid
from contextvars import ContextVar
from typing import Any, Dict, Optional

import structlog

# Per-request correlation id, populated by the X-Request-ID middleware
correlation_id_var: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)


def get_correlation_id() -> Optional[str]:
    return correlation_id_var.get()


def set_correlation_id(correlation_id: Optional[str] = None) -> str:
    """Bind ``correlation_id`` (or a fresh uuid4) to the running request context."""
    value = correlation_id or str(uuid.uuid4())
    correlation_id_var.set(value)
    return value


def _add_correlation_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    request_id = get_correlation_id()
    if request_id:
        event_dict.setdefault("correlation_id", request_id)
    return event_dict


_PII_KEYS = {"password", "secret", "token", "api_key", "authorization", "email"}


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Redact credentials and addresses before they reach a log sink."""
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if lower_key == "event":
            continue
        if any(pii in lower_key for pii in _PII_KEYS):
            value = event_dict[key]
            if isinstance(value, str) and len(value) > 4:
                # keep first/last 2 chars so related lines can still be matched up
                event_dict[key] = value[:2] + "***" + value[-2:]
    return event_dict


def _configure_structlog(
    level: str = "INFO", *, json_lines: bool = True, console: bool = False
) -> None:
    """Install the processor chain; ``console`` switches to coloured human output."""
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_correlation_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if console or not json_lines:
        processors = shared_processors + [
            structlog.dev.ConsoleRenderer(colors=True),
        ]
    else:
        processors = shared_processors + [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


_configure_structlog(
    os.getenv("LOG_LEVEL", "INFO"),
    json_lines=_env_flag("LOG_JSON", "true"),
    console=_env_flag("LOG_DEV_MODE", "false"),
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


_SENSITIVE_FIELDS = (
    "password",
    "token",
    "secret",
    "key",
    "cardnumber",
    "cvv",
    "ssn",
    "creditcard",
    "bankaccount",
    "socialsecurity",
    "apikey",
    "privatekey",
)


def mask_sensitive_data(data: Any, *, depth: int = 0, max_depth: int = 20) -> Any:
    """Mask sensitive values in nested dicts/lists before they are persisted.

    String values under a sensitive key keep only their last 4 characters;
    anything else under such a key becomes ``[MASKED]``.
    """
    if depth > max_depth:
        return "[max depth exceeded]"
    if isinstance(data, dict):
        result: Dict[str, Any] = {}
        for key, value in data.items():
            lower_key = str(key).lower().replace("-", "").replace("_", "")
            if any(field in lower_key for field in _SENSITIVE_FIELDS):
                if isinstance(value, str):
                    if len(value) > 4:
                        result[key] = "*" * (len(value) - 4) + value[-4:]
                    else:
                        result[key] = "*" * len(value)
                else:
                    result[key] = "[MASKED]"
            else:
                result[key] = mask_sensitive_data(value, depth=depth + 1, max_depth=max_depth)
        return result
    if isinstance(data, list):
        return [mask_sensitive_data(item, depth=depth + 1, max_depth=max_depth) for item in data]
    return data
