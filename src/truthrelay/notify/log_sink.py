"""Sink that only logs, used with ``DRY_RUN=true``."""

from __future__ import annotations

from truthrelay.logging import get_logger
from truthrelay.models import CandidateItem
from truthrelay.utils import truncate_text

log = get_logger("truthrelay.notify.log_sink")


class LogSink:
    """Log each notification instead of sending it."""

    name = "log"

    def __init__(self) -> None:
        self.delivered: list[str] = []

    async def deliver(self, item: CandidateItem) -> bool:
        log.info(
            "dry_run_notification",
            item_id=item.id,
            url=item.url,
            created_at=item.created_at.isoformat(),
            media=item.media.kind if item.media else None,
            content=truncate_text(item.content, 200),
        )
        self.delivered.append(item.id)
        return True

    async def close(self) -> None:
        log.info("log_sink_closed", delivered=len(self.delivered))
