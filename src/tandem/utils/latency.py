"""Latency diagnostics for turn and tool timing."""

from __future__ import annotations

import logging
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

_TRUTHY = {"1", "true", "yes", "on"}


def diagnostics_enabled() -> bool:
    """Return whether latency diagnostics are enabled for this process."""
    raw = os.environ.get("TANDEM_LATENCY_DIAGNOSTICS", "")
    return raw.strip().lower() in _TRUTHY


def elapsed_ms(started: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading, never negative."""
    return max(0, int((time.monotonic() - started) * 1000))


def log_latency_event(
    logger: logging.Logger,
    *,
    event: str,
    duration_seconds: float,
    fields: dict[str, Any] | None = None,
) -> None:
    """Emit one ``latency event=...`` line when diagnostics are enabled."""
    if not diagnostics_enabled():
        return
    duration_ms = max(0.0, float(duration_seconds)) * 1000.0
    payload = ""
    if fields:
        payload = " " + " ".join(f"{key}={value}" for key, value in fields.items())
    logger.info("latency event=%s duration_ms=%.2f%s", event, duration_ms, payload)


@contextmanager
def timed_block(
    logger: logging.Logger,
    *,
    event: str,
    fields: dict[str, Any] | None = None,
) -> Iterator[dict[str, Any]]:
    """Time the enclosed block and log it on exit.

    Yields a mutable dict; keys added inside the block (an outcome, a
    count) are appended to the logged fields.
    """
    extra: dict[str, Any] = dict(fields or {})
    started = time.monotonic()
    try:
        yield extra
    finally:
        log_latency_event(
            logger,
            event=event,
            duration_seconds=time.monotonic() - started,
            fields=extra,
        )
