"""Shared utilities for truthrelay."""

import html
import re
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import structlog

_TAG_RE = re.compile(r"<[^>]*>")
_BREAK_RE = re.compile(r"<br\s*/?>|</p>\s*<p[^>]*>", re.IGNORECASE)


@asynccontextmanager
async def timed_operation(
    name: str,
    log: structlog.stdlib.BoundLogger | None = None,
    **extra: Any,
) -> AsyncIterator[dict[str, Any]]:
    """Context manager that measures elapsed time for an async operation.

    Usage::

        async with timed_operation("poll_cycle", log=log) as timing:
            await do_something()
        print(timing["elapsed_ms"])

    Args:
        name: A label for the operation (used in log messages).
        log: Optional structlog logger; if provided, an info-level message
             is emitted on exit.
        **extra: Additional key-value pairs forwarded to the log call.

    Yields:
        A mutable dict that will contain ``elapsed_ms`` after the block exits.
    """
    start = time.perf_counter()
    result: dict[str, Any] = {}
    try:
        yield result
    finally:
        result["elapsed_ms"] = round((time.perf_counter() - start) * 1000, 2)
        if log:
            log.info(name, duration_ms=result["elapsed_ms"], **extra)


def strip_html(content: str) -> str:
    """Turn a Mastodon-style HTML post body into plain text."""
    if not content:
        return ""
    text = _BREAK_RE.sub("\n", content)
    text = _TAG_RE.sub("", text)
    return html.unescape(text).strip()


def truncate_text(text: str, max_length: int = 2000) -> str:
    """Shorten ``text`` to ``max_length`` characters, marking the cut with '...'."""
    if max_length <= 3:
        raise ValueError("max_length must be > 3")
    if not text or len(text) <= max_length:
        return text
    return text[: max_length - 3] + "..."


def format_duration(seconds: float) -> str:
    """Format a media duration as ``m:ss``."""
    minutes = int(seconds // 60)
    remaining = round(seconds % 60)
    if remaining == 60:
        minutes += 1
        remaining = 0
    return f"{minutes}:{remaining:02d}"
