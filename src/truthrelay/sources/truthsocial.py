"""Truth Social posts via the ScrapeCreators API.

``GET {base_url}/user/posts?handle=<handle>`` with an ``x-api-key`` header
returns ``{"success": true, "posts": [...]}`` with the newest post first.
"""

from __future__ import annotations

from datetime import UTC, datetime
from functools import cmp_to_key
from typing import Any

import httpx

from truthrelay.errors import ConfigMissing, UpstreamUnavailable
from truthrelay.logging import get_logger
from truthrelay.models import CandidateItem, MediaRef
from truthrelay.sources.base import native_id_compare
from truthrelay.utils import strip_html

log = get_logger("truthrelay.sources.truthsocial")

DEFAULT_BASE_URL = "https://api.scrapecreators.com/v1/truthsocial"


def parse_created_at(value: Any) -> datetime:
    """Parse an ISO-8601 timestamp, tolerating a trailing ``Z``."""
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            log.debug("unparseable_created_at", value=value)
        else:
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return datetime.now(UTC)


def parse_media(attachments: Any) -> MediaRef | None:
    """Return the first media attachment, if any."""
    if not isinstance(attachments, list) or not attachments:
        return None
    first = attachments[0]
    if not isinstance(first, dict) or not first.get("url"):
        return None
    meta = first.get("meta")
    original = meta.get("original") if isinstance(meta, dict) else None
    if not isinstance(original, dict):
        original = {}
    return MediaRef(
        kind=str(first.get("type") or "unknown"),
        url=first["url"],
        preview_url=first.get("preview_url") or "",
        duration=original.get("duration"),
        width=original.get("width"),
        height=original.get("height"),
    )


def parse_post(post: dict[str, Any]) -> CandidateItem:
    """Map one API post to a :class:`CandidateItem`."""
    content = post.get("text") or strip_html(post.get("content") or "")
    return CandidateItem(
        id=str(post["id"]),
        content=content,
        created_at=parse_created_at(post.get("created_at")),
        url=post.get("url") or post.get("uri") or "",
        media=parse_media(post.get("media_attachments")),
    )


class TruthSocialFetcher:
    """Fetch the latest posts of one Truth Social account."""

    name = "truthsocial"

    def __init__(
        self,
        api_key: str | None,
        handle: str,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = 30.0,
    ) -> None:
        """Initialize the fetcher.

        Args:
            api_key: ScrapeCreators API key. A missing key is not an error
                here; every ``fetch`` raises :class:`ConfigMissing` instead.
            handle: Account handle, without the leading ``@``.
            base_url: Base URL of the Truth Social endpoints.
            timeout: HTTP request timeout in seconds.
        """
        self._api_key = api_key or ""
        self._handle = handle.lstrip("@")
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout

    @property
    def handle(self) -> str:
        return self._handle

    @property
    def profile_url(self) -> str:
        return f"https://truthsocial.com/@{self._handle}"

    @property
    def configured(self) -> bool:
        return bool(self._api_key)

    def compare(self, a: str, b: str) -> int:
        return native_id_compare(a, b)

    async def fetch(self, limit: int) -> list[CandidateItem]:
        """Return up to ``limit`` posts, newest first."""
        if not self._api_key:
            raise ConfigMissing("SCRAPECREATORS_API_KEY is not set")

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.get(
                    f"{self._base_url}/user/posts",
                    params={"handle": self._handle},
                    headers={"x-api-key": self._api_key},
                )
                response.raise_for_status()
                data = response.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            message = f"Truth Social API error {status}"
            if status == 404:
                message += " (the API may have changed; check the endpoint documentation)"
            raise UpstreamUnavailable(message, status_code=status) from exc
        except httpx.RequestError as exc:
            raise UpstreamUnavailable(f"Truth Social API request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"Truth Social API returned invalid JSON: {exc}") from exc

        if not isinstance(data, dict) or not data.get("success"):
            log.debug("truthsocial_unsuccessful_response", handle=self._handle)
            return []

        posts = data.get("posts") or []
        if not isinstance(posts, list):
            raise UpstreamUnavailable(
                f"Truth Social API returned unexpected posts payload: {type(posts).__name__}"
            )

        items: list[CandidateItem] = []
        for raw in posts:
            if not isinstance(raw, dict):
                log.warning("truthsocial_post_malformed", error=f"not an object: {raw!r:.80}")
                continue
            try:
                items.append(parse_post(raw))
            except (KeyError, TypeError, AttributeError) as exc:
                log.warning("truthsocial_post_malformed", error=str(exc))
        items.sort(key=cmp_to_key(self.compare), reverse=True)
        return items[:limit]
