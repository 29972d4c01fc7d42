"""Fetcher interface and identifier ordering."""

from __future__ import annotations

from typing import Protocol

from truthrelay.models import CandidateItem


def native_id_compare(a: str, b: str) -> int:
    """Order post identifiers; return <0, 0 or >0 like ``cmp``.

    Truth Social ids are decimal snowflakes, so all-digit ids compare as
    numbers (shorter is smaller). Anything else falls back to plain string
    comparison, which is only correct for fixed-width identifiers.
    """
    if a == b:
        return 0
    if a.isdigit() and b.isdigit():
        a_key: tuple[int, str] = (len(a.lstrip("0")), a.lstrip("0"))
        b_key: tuple[int, str] = (len(b.lstrip("0")), b.lstrip("0"))
    else:
        a_key, b_key = (0, a), (0, b)
    if a_key == b_key:
        return 0
    return -1 if a_key < b_key else 1


class Fetcher(Protocol):
    """Source of candidate posts for the tracked account.

    ``fetch`` returns at most ``limit`` items ordered newest-first and raises
    :class:`~truthrelay.errors.UpstreamUnavailable` or
    :class:`~truthrelay.errors.ConfigMissing`. ``compare`` defines the
    ordering of identifiers used for deduplication.
    """

    name: str

    async def fetch(self, limit: int) -> list[CandidateItem]:
        ...

    def compare(self, a: str, b: str) -> int:
        ...
