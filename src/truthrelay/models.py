"""Data models shared by the relay components."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class MediaRef:
    """First media attachment of a post."""

    kind: str  # "image", "video", "gifv", ...
    url: str
    preview_url: str = ""
    duration: float | None = None
    width: int | None = None
    height: int | None = None

    @property
    def is_image(self) -> bool:
        return self.kind == "image"

    @property
    def is_video(self) -> bool:
        return self.kind in ("video", "gifv")


@dataclass(frozen=True)
class CandidateItem:
    """A post returned by the fetcher.

    Candidates are produced fresh every cycle and never persisted; only the
    ``id`` of a delivered item is stored, as the watermark.
    """

    id: str
    content: str
    created_at: datetime
    url: str
    media: MediaRef | None = None
