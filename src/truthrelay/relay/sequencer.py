"""Decide which fetched posts are new and advance the watermark.

Candidates arrive newest-first. A post is new when its id orders after the
watermark; new posts are returned oldest-first so notifications read in
chronological order. With no watermark yet, or on a forced cycle, only the
newest candidate counts as new, which keeps a first run from flooding the
channel with the whole fetch window.

The watermark is written *before* the result is handed back for dispatch and
never per item: a crash mid-dispatch loses the rest of the batch instead of
re-sending the part that went out.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass

from truthrelay.logging import get_logger
from truthrelay.models import CandidateItem
from truthrelay.state.store import WatermarkStore

log = get_logger("truthrelay.relay.sequencer")


@dataclass(frozen=True)
class CycleResult:
    """Outcome of sequencing one batch."""

    to_deliver: tuple[CandidateItem, ...]
    previous_watermark: str | None  # None: the store was not consulted
    new_watermark: str | None = None  # None: unchanged
    forced: bool = False
    committed: bool = False
    skipped_reason: str | None = None

    @property
    def has_news(self) -> bool:
        return bool(self.to_deliver)


def select_new(
    candidates: Sequence[CandidateItem],
    watermark: str,
    *,
    force: bool = False,
    compare: Callable[[str, str], int],
) -> tuple[list[CandidateItem], str | None]:
    """Return ``(new items oldest-first, new watermark)``.

    ``candidates`` must be ordered newest-first.
    """
    if not candidates:
        return [], None

    if force or not watermark:
        newest = candidates[0]
        return [newest], newest.id

    fresh = [item for item in candidates if compare(item.id, watermark) > 0]
    if not fresh:
        return [], None
    return list(reversed(fresh)), fresh[0].id


class Sequencer:
    """Select new posts against the durable watermark."""

    def __init__(self, store: WatermarkStore, compare: Callable[[str, str], int]) -> None:
        self._store = store
        self._compare = compare

    async def sequence(
        self,
        candidates: Sequence[CandidateItem],
        force: bool = False,
    ) -> CycleResult:
        """Pick the posts to deliver and commit the new watermark.

        Non-forced cycles are skipped while the store is not ready or the
        watermark could not be read, since an empty watermark would then
        re-announce the newest post every cycle.
        """
        if not candidates:
            return CycleResult(to_deliver=(), previous_watermark=None, forced=force)

        watermark = await self._store.read()

        if not force:
            if not self._store.is_ready:
                return self._skipped(watermark, "store_not_ready")
            if self._store.last_read_failed:
                return self._skipped(watermark, "watermark_read_failed")
            high_water = self._store.high_water
            if high_water and (not watermark or self._compare(high_water, watermark) > 0):
                log.warning(
                    "watermark_behind_high_water",
                    watermark=watermark,
                    high_water=high_water,
                )
                watermark = high_water

        to_deliver, new_watermark = select_new(
            candidates, watermark, force=force, compare=self._compare
        )
        if not to_deliver or new_watermark is None:
            log.debug("no_new_posts", watermark=watermark, candidates=len(candidates))
            return CycleResult(to_deliver=(), previous_watermark=watermark, forced=force)

        if force:
            log.info("processing_forced_post", item_id=new_watermark)
        elif not watermark:
            log.info("processing_initial_post", item_id=new_watermark)
        else:
            log.info("new_posts_found", count=len(to_deliver), watermark=watermark)

        committed = await self._store.write(new_watermark, force=force)
        if not committed:
            log.warning(
                "watermark_not_committed",
                item_id=new_watermark,
                store_state=self._store.state.value,
            )

        return CycleResult(
            to_deliver=tuple(to_deliver),
            previous_watermark=watermark,
            new_watermark=new_watermark,
            forced=force,
            committed=committed,
        )

    def _skipped(self, watermark: str, reason: str) -> CycleResult:
        log.info("sequencing_skipped", reason=reason, store_state=self._store.state.value)
        return CycleResult(to_deliver=(), previous_watermark=watermark, skipped_reason=reason)
