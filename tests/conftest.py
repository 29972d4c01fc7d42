"""Shared fixtures for truthrelay tests.

The in-memory backend, fetcher and sink below stand in for CouchDB, the
ScrapeCreators API and Discord, so pipeline behaviour can be exercised
without any network access.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from truthrelay.errors import SinkDeliveryFailed, StoreUnavailable, UpstreamUnavailable
from truthrelay.models import CandidateItem, MediaRef
from truthrelay.relay.governor import DomainPolicy, ErrorRateGovernor
from truthrelay.sources.base import native_id_compare

BASE_TIME = datetime(2025, 1, 6, 20, 0, 0, tzinfo=UTC)


def build_item(
    item_id: str,
    content: str | None = None,
    media: MediaRef | None = None,
) -> CandidateItem:
    """Build a CandidateItem whose timestamp grows with its numeric id."""
    offset = int(item_id) if item_id.isdigit() else 0
    return CandidateItem(
        id=item_id,
        content=content if content is not None else f"post {item_id}",
        created_at=BASE_TIME + timedelta(minutes=offset),
        url=f"https://truthsocial.com/@realDonaldTrump/{item_id}",
        media=media,
    )


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MemoryBackend:
    """Document backend kept in a dict.

    ``fail_connects`` makes that many ``connect`` calls fail; ``down`` makes
    every call fail until it is cleared.
    """

    name = "memory"

    def __init__(self) -> None:
        self.docs: dict[str, dict[str, Any]] = {}
        self.fail_connects = 0
        self.down = False
        self.connect_calls = 0
        self.merges: list[dict[str, Any]] = []
        self.closed = False

    def _check(self) -> None:
        if self.down:
            raise StoreUnavailable("connection refused")

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise StoreUnavailable("connection refused")
        self._check()

    async def get(self, doc_id: str) -> dict[str, Any] | None:
        self._check()
        doc = self.docs.get(doc_id)
        return dict(doc) if doc is not None else None

    async def create(self, doc_id: str, fields: dict[str, Any]) -> None:
        self._check()
        self.docs.setdefault(doc_id, dict(fields))

    async def merge(self, doc_id: str, fields: dict[str, Any]) -> None:
        self._check()
        self.merges.append(dict(fields))
        self.docs.setdefault(doc_id, {}).update(fields)

    async def close(self) -> None:
        self.closed = True


class FakeFetcher:
    """Fetcher returning a configurable newest-first batch."""

    name = "fake"
    configured = True
    profile_url = "https://truthsocial.com/@realDonaldTrump"

    def __init__(self, ids: list[str] | None = None) -> None:
        self.items = [build_item(i) for i in ids or []]
        self.error: Exception | None = None
        self.calls: list[int] = []

    def set_ids(self, ids: list[str]) -> None:
        self.items = [build_item(i) for i in ids]

    async def fetch(self, limit: int) -> list[CandidateItem]:
        self.calls.append(limit)
        if self.error is not None:
            raise self.error
        return self.items[:limit]

    def compare(self, a: str, b: str) -> int:
        return native_id_compare(a, b)


class RecordingSink:
    """Sink that records delivered ids.

    Ids in ``reject`` raise :class:`SinkDeliveryFailed`; ids in ``errors``
    raise the mapped exception.
    """

    name = "recording"

    def __init__(self) -> None:
        self.delivered: list[str] = []
        self.reject: set[str] = set()
        self.errors: dict[str, Exception] = {}
        self.connected = True
        self.closed = False

    async def deliver(self, item: CandidateItem) -> bool:
        if not self.connected:
            return False
        if item.id in self.reject:
            raise SinkDeliveryFailed(f"rejected {item.id}")
        if item.id in self.errors:
            raise self.errors[item.id]
        self.delivered.append(item.id)
        return True

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_item() -> Callable[..., CandidateItem]:
    """Factory for CandidateItem objects."""
    return build_item


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def governor(clock: FakeClock) -> ErrorRateGovernor:
    """Governor with the production defaults and a controllable clock."""
    return ErrorRateGovernor(DomainPolicy(threshold=3, cooldown_seconds=1800), clock=clock)


@pytest.fixture
def memory_backend() -> MemoryBackend:
    return MemoryBackend()


@pytest.fixture
def fake_fetcher() -> FakeFetcher:
    return FakeFetcher()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def upstream_error() -> UpstreamUnavailable:
    return UpstreamUnavailable("Truth Social API error 503", status_code=503)
