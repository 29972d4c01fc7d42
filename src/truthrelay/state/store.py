"""Durable watermark store.

Holds a single document with the id of the most recently delivered post.
The store fails open: until it is connected every read returns the empty
watermark and every write is skipped, so callers must look at
:attr:`WatermarkStore.is_ready` before doing anything they cannot undo.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from enum import Enum

from truthrelay.constants import DOMAIN_STORE_CONNECT, DOMAIN_STORE_IO, WATERMARK_FIELD
from truthrelay.errors import StoreUnavailable
from truthrelay.logging import get_logger
from truthrelay.relay.governor import ErrorRateGovernor
from truthrelay.sources.base import native_id_compare
from truthrelay.state.backends import DocumentBackend

log = get_logger("truthrelay.state.store")


class ConnectionState(Enum):
    """Lifecycle of the store connection."""

    UNINITIALIZED = "uninitialized"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


class WatermarkStore:
    """Read and advance the last delivered post id.

    Lifecycle::

        store = WatermarkStore(backend, governor)
        await store.initialize(timeout=30, retry_delay=5)
        last_id = await store.read()
        await store.write(new_id)
    """

    def __init__(
        self,
        backend: DocumentBackend,
        governor: ErrorRateGovernor,
        doc_id: str = "last_seen_posts",
        compare: Callable[[str, str], int] = native_id_compare,
    ) -> None:
        self._backend = backend
        self._governor = governor
        self._doc_id = doc_id
        self._compare = compare
        self._state = ConnectionState.UNINITIALIZED
        self._connection_errors = 0
        self._high_water = ""
        self._last_read_failed = False

    # ------------------------------------------------------------------
    # Connection state
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return self._state is ConnectionState.READY

    @property
    def connection_errors(self) -> int:
        """Consecutive failed connection attempts."""
        return self._connection_errors

    @property
    def last_read_failed(self) -> bool:
        """True when the latest read hit a backend error and returned empty."""
        return self._last_read_failed

    @property
    def high_water(self) -> str:
        """Highest watermark read or written during this process run."""
        return self._high_water

    async def initialize(self, timeout: float = 30.0, retry_delay: float = 5.0) -> ConnectionState:
        """Connect to the backend, retrying until ``timeout`` seconds have passed.

        Each attempt makes sure the database and the watermark document exist.
        When the window closes without success the store is left in
        ``FAILED`` and does not retry on its own.
        """
        if self.is_ready:
            return self._state

        self._state = ConnectionState.CONNECTING
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        log.info(
            "store_connecting",
            backend=self._backend.name,
            doc_id=self._doc_id,
            timeout_seconds=timeout,
        )

        while True:
            try:
                # A single hanging attempt must not outlive the window
                await asyncio.wait_for(self._attempt(), timeout=deadline - loop.time())
            except (StoreUnavailable, asyncio.TimeoutError) as exc:
                self._connection_errors += 1
                if self._governor.record_failure(DOMAIN_STORE_CONNECT):
                    log.error(
                        "store_connect_failed",
                        attempt=self._connection_errors,
                        backend=self._backend.name,
                        error=str(exc) or "connection attempt timed out",
                    )
            else:
                self._state = ConnectionState.READY
                self._connection_errors = 0
                self._governor.record_success(DOMAIN_STORE_CONNECT)
                log.info("store_ready", backend=self._backend.name, doc_id=self._doc_id)
                return self._state

            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            await asyncio.sleep(min(retry_delay, remaining))
            if loop.time() >= deadline:
                break

        self._state = ConnectionState.FAILED
        log.error(
            "store_initialization_timed_out",
            backend=self._backend.name,
            timeout_seconds=timeout,
            attempts=self._connection_errors,
        )
        return self._state

    async def _attempt(self) -> None:
        await self._backend.connect()
        doc = await self._backend.get(self._doc_id)
        if doc is None:
            await self._backend.create(self._doc_id, {WATERMARK_FIELD: ""})
            log.info("watermark_document_created", doc_id=self._doc_id)

    async def close(self) -> None:
        await self._backend.close()
        self._state = ConnectionState.UNINITIALIZED

    # ------------------------------------------------------------------
    # Watermark access
    # ------------------------------------------------------------------

    async def read(self) -> str:
        """Return the persisted watermark, or "" when unknown."""
        if not self.is_ready:
            return ""

        try:
            doc = await self._backend.get(self._doc_id)
        except StoreUnavailable as exc:
            self._last_read_failed = True
            if self._governor.record_failure(DOMAIN_STORE_IO):
                log.error("watermark_read_failed", doc_id=self._doc_id, error=str(exc))
            return ""

        self._last_read_failed = False
        self._governor.record_success(DOMAIN_STORE_IO)
        value = str((doc or {}).get(WATERMARK_FIELD) or "")
        self._observe(value)
        return value

    async def write(self, item_id: str, *, force: bool = False) -> bool:
        """Persist ``item_id`` as the new watermark.

        A non-forced write that would move the watermark below a value
        already seen in this run is refused. Returns True when the value was
        stored.
        """
        if not self.is_ready:
            log.info(
                "watermark_write_skipped",
                reason="store_not_ready",
                state=self._state.value,
                item_id=item_id,
            )
            return False

        if not force and self._high_water and self._compare(item_id, self._high_water) < 0:
            log.warning(
                "watermark_regression_refused",
                item_id=item_id,
                high_water=self._high_water,
            )
            return False

        try:
            await self._backend.merge(self._doc_id, {WATERMARK_FIELD: item_id})
        except StoreUnavailable as exc:
            if self._governor.record_failure(DOMAIN_STORE_IO):
                log.error("watermark_write_failed", item_id=item_id, error=str(exc))
            return False

        self._governor.record_success(DOMAIN_STORE_IO)
        if force:
            self._high_water = item_id
        else:
            self._observe(item_id)
        log.debug("watermark_written", item_id=item_id, forced=force)
        return True

    def _observe(self, value: str) -> None:
        if value and (not self._high_water or self._compare(value, self._high_water) > 0):
            self._high_water = value
