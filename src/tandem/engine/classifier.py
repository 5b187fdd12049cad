"""Failure classification for turn recovery.

Maps any exception raised inside a turn onto one of a small set of
recovery categories. Typed exceptions are checked first, then
HTTP-shaped attributes, then error codes, then a regex table over the
message text (first match wins). The function is total: anything
unrecognised is Generic.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from tandem.exceptions import (
    AuthExpiredError,
    ContextLimitError,
    InsufficientCreditsError,
    QuotaExceededError,
    RecursionLimitError,
    TurnCancelledError,
)

DEFAULT_COOLDOWN_MINUTES = 60


class ErrorCategory(Enum):
    CANCELLED = "cancelled"
    QUOTA_EXCEEDED = "quota_exceeded"
    AUTH_EXPIRED = "auth_expired"
    INSUFFICIENT_CREDITS = "insufficient_credits"
    CONTEXT_LIMIT_EXCEEDED = "context_limit_exceeded"
    RECURSION_LIMIT_EXCEEDED = "recursion_limit_exceeded"
    GENERIC = "generic"


@dataclass
class Classification:
    category: ErrorCategory
    retryable: bool = False
    payload: dict[str, Any] = field(default_factory=dict)


_COOLDOWN_RE = re.compile(
    r"(?:cooldown[_ ]?minutes[\"']?\s*[:=]\s*|wait\s+)(\d+)", re.IGNORECASE,
)
_PAID_PLAN_RE = re.compile(r"is[_ ]?paid[_ ]?plan[\"']?\s*[:=]\s*true", re.IGNORECASE)

# Order matters (first match wins)
_PATTERNS: list[tuple[re.Pattern, ErrorCategory]] = [
    (
        re.compile(r"plan limits? exceeded|PLAN_LIMITS_EXCEEDED|quota exceeded", re.IGNORECASE),
        ErrorCategory.QUOTA_EXCEEDED,
    ),
    (
        re.compile(r"insufficient credits|INSUFFICIENT_CREDITS|payment required", re.IGNORECASE),
        ErrorCategory.INSUFFICIENT_CREDITS,
    ),
    (
        re.compile(
            r"context (?:length|window|limit)|prompt is too long|maximum context|too many tokens",
            re.IGNORECASE,
        ),
        ErrorCategory.CONTEXT_LIMIT_EXCEEDED,
    ),
    (
        re.compile(r"\bunauthori[sz]ed\b|token (?:has )?expired|invalid access token", re.IGNORECASE),
        ErrorCategory.AUTH_EXPIRED,
    ),
]

_CODES: dict[str, ErrorCategory] = {
    "UNAUTHORIZED": ErrorCategory.AUTH_EXPIRED,
    "INSUFFICIENT_CREDITS": ErrorCategory.INSUFFICIENT_CREDITS,
    "PLAN_LIMITS_EXCEEDED": ErrorCategory.QUOTA_EXCEEDED,
    "CONTEXT_LIMIT_EXCEEDED": ErrorCategory.CONTEXT_LIMIT_EXCEEDED,
}


def classify(error: BaseException | Any) -> Classification:
    """Classify a failure into a recovery category."""
    if isinstance(error, (TurnCancelledError, asyncio.CancelledError)):
        return Classification(ErrorCategory.CANCELLED)
    if isinstance(error, QuotaExceededError):
        return _quota(error.cooldown_minutes, error.is_paid_plan)
    if isinstance(error, AuthExpiredError):
        return Classification(ErrorCategory.AUTH_EXPIRED, retryable=True)
    if isinstance(error, InsufficientCreditsError):
        return Classification(ErrorCategory.INSUFFICIENT_CREDITS)
    if isinstance(error, ContextLimitError):
        return Classification(ErrorCategory.CONTEXT_LIMIT_EXCEEDED)
    if isinstance(error, RecursionLimitError):
        return Classification(
            ErrorCategory.RECURSION_LIMIT_EXCEEDED,
            payload={"depth": error.depth, "max_depth": error.max_depth},
        )

    text = _message_text(error)

    status = _status_code(error)
    if status == 401:
        return Classification(ErrorCategory.AUTH_EXPIRED, retryable=True)
    if status == 402:
        return Classification(ErrorCategory.INSUFFICIENT_CREDITS)
    if status == 429 and re.search(r"plan|limit|quota", text, re.IGNORECASE):
        return _quota_from_text(text)

    code = getattr(error, "code", None)
    if isinstance(code, str) and code.upper() in _CODES:
        return _from_category(_CODES[code.upper()], text)

    for pattern, category in _PATTERNS:
        if pattern.search(text):
            return _from_category(category, text)

    return Classification(ErrorCategory.GENERIC, payload={"message": text})


def _from_category(category: ErrorCategory, text: str) -> Classification:
    if category is ErrorCategory.QUOTA_EXCEEDED:
        return _quota_from_text(text)
    return Classification(category, retryable=category is ErrorCategory.AUTH_EXPIRED)


def _quota(cooldown_minutes: int, is_paid_plan: bool) -> Classification:
    return Classification(
        ErrorCategory.QUOTA_EXCEEDED,
        payload={"cooldown_minutes": cooldown_minutes, "is_paid_plan": is_paid_plan},
    )


def _quota_from_text(text: str) -> Classification:
    match = _COOLDOWN_RE.search(text)
    cooldown = int(match.group(1)) if match else DEFAULT_COOLDOWN_MINUTES
    return _quota(cooldown, bool(_PAID_PLAN_RE.search(text)))


def _status_code(error: Any) -> int | None:
    status = getattr(error, "status_code", None)
    if status is None:
        response = getattr(error, "response", None)
        status = getattr(response, "status_code", None)
    try:
        return int(status) if status is not None else None
    except (TypeError, ValueError):
        return None


def _message_text(error: Any) -> str:
    parts = [str(error)]
    response = getattr(error, "response", None)
    try:
        body = getattr(response, "text", None)
    except RuntimeError:
        # streamed httpx responses raise until the body is read
        body = None
    if isinstance(body, str) and body:
        parts.append(body)
    return " ".join(parts)
