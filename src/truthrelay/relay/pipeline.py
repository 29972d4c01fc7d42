"""One poll cycle: fetch, sequence, dispatch.

Every failure kind is absorbed here and logged only when the
:class:`ErrorRateGovernor` allows it, so a long upstream outage produces a
handful of log lines instead of one per poll.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from truthrelay.constants import (
    DOMAIN_FETCH_CALL,
    DOMAIN_FETCH_CONFIG,
    DOMAIN_SINK_DELIVER,
)
from truthrelay.errors import ConfigMissing, SinkDeliveryFailed, UpstreamUnavailable
from truthrelay.logging import get_logger
from truthrelay.models import CandidateItem
from truthrelay.notify.base import NotificationSink
from truthrelay.relay.governor import ErrorRateGovernor
from truthrelay.relay.sequencer import CycleResult, Sequencer
from truthrelay.sources.base import Fetcher
from truthrelay.utils import timed_operation

log = get_logger("truthrelay.relay.pipeline")


class CycleStatus(Enum):
    """How a cycle ended."""

    DELIVERED = "delivered"
    NO_NEWS = "no_news"
    SKIPPED = "skipped"


@dataclass
class CycleReport:
    """Summary of one pipeline cycle."""

    status: CycleStatus
    forced: bool = False
    reason: str | None = None
    fetched: int = 0
    delivered: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    watermark: str | None = None
    elapsed_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "forced": self.forced,
            "reason": self.reason,
            "fetched": self.fetched,
            "delivered": self.delivered,
            "failed": self.failed,
            "watermark": self.watermark,
            "elapsed_ms": self.elapsed_ms,
        }


class RelayPipeline:
    """Wire the fetcher, sequencer and sink together for a single cycle."""

    def __init__(
        self,
        fetcher: Fetcher,
        sequencer: Sequencer,
        sink: NotificationSink,
        governor: ErrorRateGovernor,
        fetch_limit: int = 5,
    ) -> None:
        self._fetcher = fetcher
        self._sequencer = sequencer
        self._sink = sink
        self._governor = governor
        self._fetch_limit = fetch_limit

    async def run_cycle(self, force: bool = False, limit: int | None = None) -> CycleReport:
        """Run one cycle. Never raises for upstream, store or sink failures."""
        async with timed_operation("poll_cycle") as timing:
            report = await self._run(force, limit or self._fetch_limit)
        report.elapsed_ms = timing["elapsed_ms"]
        log.info("poll_cycle_finished", **report.to_dict())
        return report

    async def _run(self, force: bool, limit: int) -> CycleReport:
        candidates = await self._fetch(limit)
        if candidates is None:
            return CycleReport(status=CycleStatus.SKIPPED, forced=force, reason="fetch_failed")
        if not candidates:
            return CycleReport(status=CycleStatus.NO_NEWS, forced=force)

        result = await self._sequencer.sequence(candidates, force=force)
        if result.skipped_reason:
            return CycleReport(
                status=CycleStatus.SKIPPED,
                forced=force,
                reason=result.skipped_reason,
                fetched=len(candidates),
            )
        if not result.has_news:
            return CycleReport(
                status=CycleStatus.NO_NEWS,
                forced=force,
                fetched=len(candidates),
                watermark=result.previous_watermark or None,
            )

        report = CycleReport(
            status=CycleStatus.DELIVERED,
            forced=force,
            fetched=len(candidates),
            watermark=result.new_watermark,
        )
        await self._dispatch(result, report)
        return report

    async def _fetch(self, limit: int) -> list[CandidateItem] | None:
        """Fetch candidates; None means the cycle has to be skipped."""
        try:
            candidates = await self._fetcher.fetch(limit)
        except ConfigMissing as exc:
            if self._governor.record_failure(DOMAIN_FETCH_CONFIG):
                log.error("fetch_not_configured", source=self._fetcher.name, error=str(exc))
            return None
        except UpstreamUnavailable as exc:
            if self._governor.record_failure(DOMAIN_FETCH_CALL):
                policy = self._governor.policy(DOMAIN_FETCH_CALL)
                log.error(
                    "fetch_failed",
                    source=self._fetcher.name,
                    attempt=self._governor.consecutive_errors(DOMAIN_FETCH_CALL),
                    status=exc.status_code,
                    error=str(exc),
                    suppress_minutes=policy.cooldown_seconds / 60,
                )
            return None

        self._governor.record_success(DOMAIN_FETCH_CONFIG)
        self._governor.record_success(DOMAIN_FETCH_CALL)
        return candidates

    async def _dispatch(self, result: CycleResult, report: CycleReport) -> None:
        """Hand every new item to the sink, oldest first."""
        for item in result.to_deliver:
            try:
                sent = await self._sink.deliver(item)
            except SinkDeliveryFailed as exc:
                sent = False
                if self._governor.record_failure(DOMAIN_SINK_DELIVER):
                    log.error(
                        "delivery_failed",
                        item_id=item.id,
                        sink=self._sink.name,
                        error=str(exc),
                    )
            except Exception as exc:
                # The watermark is already committed, so the rest of the batch must still go out
                sent = False
                if self._governor.record_failure(DOMAIN_SINK_DELIVER):
                    log.error(
                        "delivery_failed",
                        item_id=item.id,
                        sink=self._sink.name,
                        error=str(exc),
                        error_type=type(exc).__name__,
                    )
            else:
                if not sent and self._governor.record_failure(DOMAIN_SINK_DELIVER):
                    log.error("delivery_failed", item_id=item.id, sink=self._sink.name)

            if sent:
                self._governor.record_success(DOMAIN_SINK_DELIVER)
                report.delivered.append(item.id)
            else:
                report.failed.append(item.id)
