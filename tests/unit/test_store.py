"""Unit tests for WatermarkStore, backed by the in-memory document backend."""

import asyncio

import pytest

from truthrelay.constants import DOMAIN_STORE_CONNECT, DOMAIN_STORE_IO, WATERMARK_FIELD
from truthrelay.state.store import ConnectionState, WatermarkStore

DOC_ID = "last_seen_posts"


@pytest.fixture
def store(memory_backend, governor) -> WatermarkStore:
    return WatermarkStore(memory_backend, governor, doc_id=DOC_ID)


@pytest.fixture
async def ready_store(store) -> WatermarkStore:
    await store.initialize(timeout=1, retry_delay=0)
    return store


class TestInitialize:
    """Tests for the bounded connection window."""

    @pytest.mark.asyncio
    async def test_creates_empty_watermark_document(self, store, memory_backend):
        state = await store.initialize(timeout=1, retry_delay=0)

        assert state is ConnectionState.READY
        assert store.is_ready
        assert memory_backend.docs[DOC_ID] == {WATERMARK_FIELD: ""}

    @pytest.mark.asyncio
    async def test_existing_document_kept(self, store, memory_backend):
        memory_backend.docs[DOC_ID] = {WATERMARK_FIELD: "42", "note": "keep"}

        await store.initialize(timeout=1, retry_delay=0)

        assert memory_backend.docs[DOC_ID] == {WATERMARK_FIELD: "42", "note": "keep"}

    @pytest.mark.asyncio
    async def test_retries_until_connected(self, store, memory_backend, governor):
        memory_backend.fail_connects = 2

        state = await store.initialize(timeout=5, retry_delay=0)

        assert state is ConnectionState.READY
        assert memory_backend.connect_calls == 3
        assert store.connection_errors == 0
        assert governor.consecutive_errors(DOMAIN_STORE_CONNECT) == 0

    @pytest.mark.asyncio
    async def test_gives_up_after_timeout(self, store, memory_backend, governor):
        memory_backend.down = True

        state = await store.initialize(timeout=0.05, retry_delay=0.01)

        assert state is ConnectionState.FAILED
        assert not store.is_ready
        assert store.connection_errors >= 1
        assert governor.consecutive_errors(DOMAIN_STORE_CONNECT) == store.connection_errors

    @pytest.mark.asyncio
    async def test_hanging_attempt_bounded_by_timeout(self, store, memory_backend, governor):
        async def slow_connect() -> None:
            await asyncio.sleep(3)

        memory_backend.connect = slow_connect
        loop = asyncio.get_running_loop()
        started = loop.time()

        state = await store.initialize(timeout=0.1, retry_delay=0.01)

        assert loop.time() - started < 1
        assert state is ConnectionState.FAILED
        assert not store.is_ready
        assert governor.consecutive_errors(DOMAIN_STORE_CONNECT) >= 1

    @pytest.mark.asyncio
    async def test_no_background_retry_after_timeout(self, store, memory_backend):
        memory_backend.down = True
        await store.initialize(timeout=0.02, retry_delay=0.01)
        calls = memory_backend.connect_calls
        memory_backend.down = False

        assert await store.read() == ""
        assert await store.write("7") is False
        assert memory_backend.connect_calls == calls
        assert store.state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_already_ready_is_noop(self, ready_store, memory_backend):
        calls = memory_backend.connect_calls
        assert await ready_store.initialize() is ConnectionState.READY
        assert memory_backend.connect_calls == calls


class TestRead:
    """Tests for reading the watermark."""

    @pytest.mark.asyncio
    async def test_not_ready_returns_empty(self, store, memory_backend):
        memory_backend.docs[DOC_ID] = {WATERMARK_FIELD: "42"}
        assert store.state is ConnectionState.UNINITIALIZED
        assert await store.read() == ""

    @pytest.mark.asyncio
    async def test_returns_persisted_value(self, ready_store, memory_backend):
        memory_backend.docs[DOC_ID][WATERMARK_FIELD] = "42"

        assert await ready_store.read() == "42"
        assert ready_store.high_water == "42"
        assert ready_store.last_read_failed is False

    @pytest.mark.asyncio
    async def test_failure_returns_empty(self, ready_store, memory_backend, governor):
        memory_backend.down = True

        assert await ready_store.read() == ""
        assert ready_store.last_read_failed is True
        assert governor.consecutive_errors(DOMAIN_STORE_IO) == 1

    @pytest.mark.asyncio
    async def test_recovery_clears_failure_flag(self, ready_store, memory_backend):
        memory_backend.down = True
        await ready_store.read()
        memory_backend.down = False

        await ready_store.read()

        assert ready_store.last_read_failed is False


class TestWrite:
    """Tests for advancing the watermark."""

    @pytest.mark.asyncio
    async def test_not_ready_is_skipped(self, store, memory_backend):
        assert await store.write("42") is False
        assert memory_backend.merges == []

    @pytest.mark.asyncio
    async def test_persists_and_preserves_other_fields(self, ready_store, memory_backend):
        memory_backend.docs[DOC_ID]["note"] = "keep"

        assert await ready_store.write("42") is True

        assert memory_backend.docs[DOC_ID] == {WATERMARK_FIELD: "42", "note": "keep"}
        assert ready_store.high_water == "42"

    @pytest.mark.asyncio
    async def test_regression_refused(self, ready_store, memory_backend):
        await ready_store.write("100")

        assert await ready_store.write("99") is False
        assert memory_backend.docs[DOC_ID][WATERMARK_FIELD] == "100"

    @pytest.mark.asyncio
    async def test_numeric_ordering_used(self, ready_store):
        await ready_store.write("99")
        assert await ready_store.write("100") is True
        assert ready_store.high_water == "100"

    @pytest.mark.asyncio
    async def test_forced_write_may_regress(self, ready_store, memory_backend):
        await ready_store.write("100")

        assert await ready_store.write("99", force=True) is True
        assert memory_backend.docs[DOC_ID][WATERMARK_FIELD] == "99"
        assert ready_store.high_water == "99"

    @pytest.mark.asyncio
    async def test_failure_returns_false(self, ready_store, memory_backend, governor):
        memory_backend.down = True

        assert await ready_store.write("42") is False
        assert governor.consecutive_errors(DOMAIN_STORE_IO) == 1


class TestClose:
    """Tests for close."""

    @pytest.mark.asyncio
    async def test_close_releases_backend(self, ready_store, memory_backend):
        await ready_store.close()
        assert memory_backend.closed is True
        assert ready_store.state is ConnectionState.UNINITIALIZED
