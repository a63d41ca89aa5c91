from __future__ import annotations

import logging
import os
import re
from contextvars import ContextVar, Token
from typing import Any, Dict, Optional

import structlog

# Execution currently being driven by the engine in this task context
execution_id_var: ContextVar[Optional[str]] = ContextVar("execution_id", default=None)


def get_execution_id() -> Optional[str]:
    """Return the execution id bound to the current task, if any."""
    return execution_id_var.get()


def bind_execution_id(execution_id: Optional[str]) -> Token:
    """Bind an execution id for every log line emitted from this context."""
    return execution_id_var.set(execution_id)


def unbind_execution_id(token: Token) -> None:
    execution_id_var.reset(token)


def _add_execution_id(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to add execution_id to all log entries."""
    eid = get_execution_id()
    if eid and "execution_id" not in event_dict:
        event_dict["execution_id"] = eid
    return event_dict


def _redact_pii(
    logger: Any, method_name: str, event_dict: Dict[str, Any]
) -> Dict[str, Any]:
    """Processor to redact credentials and contact details from log entries."""
    pii_keys = {"password", "secret", "token", "api_key", "authorization", "email", "phone"}
    for key in list(event_dict.keys()):
        lower_key = key.lower()
        if any(pii in lower_key for pii in pii_keys):
            if isinstance(event_dict[key], str) and len(event_dict[key]) > 4:
                # Keep first/last 2 chars for debugging
                event_dict[key] = event_dict[key][:2] + "***" + event_dict[key][-2:]
    return event_dict


def _configure_structlog(
    log_level: str = "INFO",
    json_output: bool = True,
    development_mode: bool = False,
) -> None:
    """Configure structlog processors.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        json_output: If True, output JSON; if False, output human-readable
        development_mode: If True, use pretty console output
    """
    shared_processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _add_execution_id,
        _redact_pii,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if development_mode or not json_output:
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
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


_log_level = os.getenv("LOG_LEVEL", "INFO").upper()
_json_output = os.getenv("LOG_JSON", "true").lower() in {"1", "true", "yes", "on"}
_dev_mode = os.getenv("LOG_DEV_MODE", "false").lower() in {"1", "true", "yes", "on"}

_configure_structlog(
    log_level=_log_level,
    json_output=_json_output,
    development_mode=_dev_mode,
)


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a configured logger; lines are tagged with the bound execution id."""
    return structlog.get_logger(name)


def log_execution_trace(trace: list, logger: Optional[Any] = None) -> None:
    """Log the per-node trace of a finished execution."""
    log = logger or get_logger("workflow")
    log.info("execution_trace", trace=trace)


# Patterns that indicate sensitive information in error messages
_SENSITIVE_ERROR_PATTERNS = [
    r'(?i)(select|insert|update|delete)\s+.{0,50}\s+(from|into|set)\s+\S+',
    r'(?i)connection\s+.*\s+(failed|refused|timeout)',
    r'(?i)/(?:home|var|etc|usr|opt|tmp|root)/[^\s]+',
    r'(?i)[a-z]:\\[^\s]+',
    r'(?i)(password|secret|token|credential|api.?key)\s*[:=]\s*[^\s]+',
    r'(?i)traceback\s*\(most recent call last\)',
    r'(?i)file\s+"[^"]+",\s+line\s+\d+',
]

_SENSITIVE_PATTERNS_COMPILED = [re.compile(p) for p in _SENSITIVE_ERROR_PATTERNS]

MAX_ERROR_MESSAGE_LENGTH = 500


def sanitize_error_message(error: str, *, replacement: str = "[redacted]") -> str:
    """Sanitize an error message before it is stored on an execution.

    Removes file paths, credentials, SQL fragments and stack traces, and caps
    the length so a misbehaving collaborator cannot flood execution records.
    """
    if not error or not isinstance(error, str):
        return "An error occurred"

    result = error
    for pattern in _SENSITIVE_PATTERNS_COMPILED:
        result = pattern.sub(replacement, result)

    if len(result) > MAX_ERROR_MESSAGE_LENGTH:
        result = result[: MAX_ERROR_MESSAGE_LENGTH - 3] + "..."

    return result


def sanitize_execution_trace(trace: list) -> list:
    """Reduce a node trace to ids, statuses, durations and output keys.

    Output values are dropped so traces can be handed to presentation layers
    without exposing role rationales or tool payloads.
    """
    sanitized = []
    for entry in trace:
        if not isinstance(entry, dict):
            continue

        safe_entry = {
            "node_id": entry.get("node_id"),
            "status": entry.get("status"),
            "duration_ms": entry.get("duration_ms"),
        }

        if entry.get("error"):
            safe_entry["error"] = sanitize_error_message(str(entry["error"]))

        if isinstance(entry.get("output"), dict):
            safe_entry["output_keys"] = sorted(entry["output"].keys())

        sanitized.append(safe_entry)

    return sanitized
