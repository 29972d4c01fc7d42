"""Discord notification sink."""

from __future__ import annotations

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import discord

from truthrelay.constants import (
    DISPLAY_TIMEZONE,
    MAX_EMBED_DESCRIPTION_LENGTH,
    MAX_EMBED_TITLE_LENGTH,
)
from truthrelay.errors import SinkDeliveryFailed
from truthrelay.logging import get_logger
from truthrelay.models import CandidateItem
from truthrelay.utils import format_duration, truncate_text

log = get_logger("truthrelay.notify.discord")

EMBED_COLOUR = discord.Colour(0xFF5700)
FOOTER_ICON_URL = "https://i.imgur.com/XptPTJY.png"


def format_posted_at(created_at: datetime, tz: str = DISPLAY_TIMEZONE) -> str:
    """Format a timestamp like ``Mon, Jan 6, 2025, 03:04 PM EST``."""
    local = created_at.astimezone(ZoneInfo(tz))
    return f"{local:%a, %b} {local.day}, {local:%Y, %I:%M %p %Z}"


class DiscordSink(discord.Client):
    """Post one embed per new post to a text channel."""

    name = "discord"

    def __init__(
        self,
        channel_id: int | None,
        display_name: str,
        profile_url: str,
    ) -> None:
        """Initialize the client.

        Args:
            channel_id: Target text channel. Without one every delivery is
                dropped with a warning.
            display_name: Author name shown on the embed.
            profile_url: Link to the tracked account.
        """
        intents = discord.Intents.default()
        intents.guild_messages = True
        super().__init__(intents=intents)

        self._channel_id = channel_id
        self._display_name = display_name
        self._profile_url = profile_url

    async def on_ready(self) -> None:
        """Called when the client is fully ready."""
        log.info("discord_ready", user=str(self.user), guilds=len(self.guilds))

    async def wait_ready(self, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds for the gateway connection."""
        try:
            await asyncio.wait_for(self.wait_until_ready(), timeout=timeout)
        except TimeoutError:
            return False
        return True

    async def _get_channel(self) -> discord.TextChannel | None:
        if not self.is_ready() or self._channel_id is None:
            return None

        channel = self.get_channel(self._channel_id)
        if channel is None:
            try:
                channel = await self.fetch_channel(self._channel_id)
            except discord.DiscordException as exc:
                log.error(
                    "discord_channel_fetch_failed",
                    channel_id=self._channel_id,
                    error=str(exc),
                )
                return None

        if not isinstance(channel, discord.TextChannel):
            log.error("discord_channel_not_text", channel_id=self._channel_id)
            return None
        return channel

    def build_embed(self, item: CandidateItem) -> discord.Embed:
        """Render ``item`` as an embed."""
        posted = format_posted_at(item.created_at)
        source = f"[Truth Social]({self._profile_url})"

        embed = discord.Embed(
            title=truncate_text(
                f"📢 New Truth Social Post from {self._display_name}", MAX_EMBED_TITLE_LENGTH
            ),
            url=item.url or None,
            colour=EMBED_COLOUR,
        )
        embed.set_author(name=self._display_name, url=self._profile_url)
        embed.set_footer(text="Truth Social", icon_url=FOOTER_ICON_URL)

        if item.content and item.content.strip():
            embed.description = truncate_text(item.content, MAX_EMBED_DESCRIPTION_LENGTH)

        media = item.media
        if media is not None and media.is_video:
            label = f"[{media.url}]({media.url})"
            if media.duration:
                label += f" ({format_duration(media.duration)})"
            embed.add_field(name="📹 Click to view video", value=label, inline=False)
        elif media is not None and media.is_image:
            embed.set_image(url=media.url)

        embed.add_field(name="🕒 Posted", value=posted, inline=True)
        embed.add_field(name="🔗 Source", value=source, inline=True)
        return embed

    async def deliver(self, item: CandidateItem) -> bool:
        """Send ``item`` to the channel; False when there is nowhere to send."""
        channel = await self._get_channel()
        if channel is None:
            log.warning(
                "discord_delivery_dropped",
                item_id=item.id,
                ready=self.is_ready(),
                channel_id=self._channel_id,
            )
            return False

        try:
            await channel.send(embed=self.build_embed(item))
        except discord.DiscordException as exc:
            raise SinkDeliveryFailed(f"Discord rejected post {item.id}: {exc}") from exc
        except (OSError, asyncio.TimeoutError) as exc:
            # discord.py re-raises connection errors once its own retries run out
            raise SinkDeliveryFailed(f"Could not reach Discord for post {item.id}: {exc}") from exc

        log.info("discord_post_sent", item_id=item.id, channel_id=self._channel_id)
        return True
