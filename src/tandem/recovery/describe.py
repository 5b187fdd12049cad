"""Error sanitising and human-readable failure descriptions.

Every message that reaches a conversation's error field, or a failed
tool result, goes through ``sanitize`` first.
"""

from __future__ import annotations

import json
import re
from typing import Any

REDACTED = "[REDACTED]"

# Applied in order; later patterns see the output of earlier ones.
_SECRET_PATTERNS: list[re.Pattern] = [
    # key=value style secrets
    re.compile(
        r"\b(api[_-]?key|token|secret|password|auth|bearer)\s*[:=]\s*['\"]?[^\s'\"]+",
        re.IGNORECASE,
    ),
    # credentials embedded in URLs
    re.compile(
        r"https?://[a-zA-Z0-9._-]{1,50}:[a-zA-Z0-9._-]{1,50}@[a-zA-Z0-9.-]{1,100}",
        re.IGNORECASE,
    ),
    re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    # internal unix paths
    re.compile(r"/(?:home|var|usr|tmp|etc|opt|root)/[^\s'\"]+"),
    # internal windows paths
    re.compile(r"[A-Za-z]:\\(?:Users|Windows|Program Files)[^\s'\"]+", re.IGNORECASE),
]

_ARGS_PREVIEW_CHARS = 200


def sanitize(message: str) -> str:
    """Redact tokens, URL credentials, e-mail addresses and internal paths."""
    sanitized = message
    for pattern in _SECRET_PATTERNS:
        sanitized = pattern.sub(REDACTED, sanitized)
    return sanitized


def error_message(error: Any) -> str:
    """Best-effort extraction of a readable message from any error value."""
    if error is None:
        return "Unknown error"
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        message = getattr(error, "message", None)
        if isinstance(message, str) and message:
            return message
        text = str(error)
        return text or type(error).__name__
    if isinstance(error, dict):
        for key in ("message", "error"):
            value = error.get(key)
            if isinstance(value, str):
                return value
    try:
        return json.dumps(error, default=str)
    except (TypeError, ValueError):
        return repr(error)


def format_error_description(
    context: str,
    error: Any,
    info: dict[str, Any] | None = None,
) -> str:
    """Format ``context: message [Type] (k=v, ...)`` with secrets removed.

    String values in ``info`` are sanitised, ``None`` values are dropped
    and nested containers collapse to ``[Object]``.
    """
    parts = [f"{context}: {sanitize(error_message(error))}"]
    if isinstance(error, BaseException):
        parts.append(f"[{type(error).__name__}]")

    if info:
        rendered: list[str] = []
        for key, value in info.items():
            if value is None:
                continue
            if isinstance(value, str):
                value = sanitize(value)
            elif isinstance(value, (dict, list, tuple, set)):
                value = "[Object]"
            rendered.append(f"{key}={value}")
        if rendered:
            parts.append(f"({', '.join(rendered)})")

    return " ".join(parts)


def recursion_depth_exceeded(depth: int, max_depth: int) -> str:
    return format_error_description(
        "Maximum recursion depth exceeded",
        f"Reached depth {depth} of {max_depth}",
        {"current_depth": depth, "max_depth": max_depth},
    )


def tool_call_failed(
    tool_name: str,
    error: Any,
    args: dict[str, Any] | None = None,
    duration_ms: int | None = None,
) -> str:
    preview = None
    if args:
        preview = json.dumps(args, default=str)[:_ARGS_PREVIEW_CHARS] + "..."
    return format_error_description(
        f"Tool call '{tool_name}' failed",
        error,
        {
            "tool": tool_name,
            "args": preview,
            "duration": f"{duration_ms}ms" if duration_ms else None,
        },
    )


def authentication_failed(error: Any, retry_count: int) -> str:
    return format_error_description(
        "Authentication failed",
        error,
        {"retry_count": retry_count},
    )
