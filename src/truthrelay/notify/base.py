"""Notification sink interface."""

from __future__ import annotations

from typing import Protocol

from truthrelay.models import CandidateItem


class NotificationSink(Protocol):
    """Renders and transmits one notification per delivered post.

    ``deliver`` returns False when the sink could not send (for example it is
    not connected yet) and raises
    :class:`~truthrelay.errors.SinkDeliveryFailed` when sending was attempted
    and rejected. The relay never retries a single item.
    """

    name: str

    async def deliver(self, item: CandidateItem) -> bool:
        ...

    async def close(self) -> None:
        ...
