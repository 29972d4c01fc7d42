"""Unit tests for the application wiring."""

from unittest.mock import patch

import pytest
from pydantic import SecretStr

from truthrelay.config import Settings
from truthrelay.constants import DOMAIN_FETCH_CONFIG, WATERMARK_FIELD
from truthrelay.main import build_backend, build_governor, build_sink, main, parse_args
from truthrelay.notify.discord import DiscordSink
from truthrelay.notify.log_sink import LogSink
from truthrelay.state.backends import CouchDBBackend, PostgresBackend
from truthrelay.sources.truthsocial import TruthSocialFetcher


def _settings(**overrides) -> Settings:
    return Settings(_env_file=None, **overrides)


@pytest.fixture
def fetcher() -> TruthSocialFetcher:
    return TruthSocialFetcher("key", "realDonaldTrump")


class TestParseArgs:
    """Tests for command line parsing."""

    def test_defaults(self):
        assert parse_args([]).once is False

    def test_once(self):
        assert parse_args(["--once"]).once is True


class TestBuilders:
    """Tests for component construction from settings."""

    def test_governor_uses_settings(self):
        governor = build_governor(_settings(error_report_threshold=4, error_suppress_minutes=10))
        policy = governor.policy("fetch-call")
        assert policy.threshold == 4
        assert policy.cooldown_seconds == 600
        assert governor.policy(DOMAIN_FETCH_CONFIG).threshold == 0

    def test_couchdb_backend_default(self):
        backend = build_backend(_settings(couchdb_url="http://couch:5984/"))
        assert isinstance(backend, CouchDBBackend)
        assert backend.database_url == "http://couch:5984/trump_tracker"

    def test_postgres_backend(self):
        backend = build_backend(_settings(state_backend="postgres"))
        assert isinstance(backend, PostgresBackend)

    def test_dry_run_uses_log_sink(self, fetcher):
        sink = build_sink(_settings(dry_run=True, discord_token="token"), fetcher)
        assert isinstance(sink, LogSink)

    def test_missing_token_uses_log_sink(self, fetcher):
        sink = build_sink(_settings(discord_token=None), fetcher)
        assert isinstance(sink, LogSink)

    def test_discord_sink(self, fetcher):
        settings = _settings(discord_token=SecretStr("token"), discord_channel_id=123)
        sink = build_sink(settings, fetcher)
        assert isinstance(sink, DiscordSink)


class TestMainOnce:
    """Tests for the --once entry point."""

    @pytest.mark.asyncio
    async def test_single_forced_cycle(self, memory_backend, fake_fetcher):
        fake_fetcher.set_ids(["9", "8"])
        settings = _settings(dry_run=True, startup_grace_seconds=0)

        with (
            patch("truthrelay.main.setup_logging"),
            patch("truthrelay.main.get_settings", return_value=settings),
            patch("truthrelay.main.build_backend", return_value=memory_backend),
            patch("truthrelay.main.TruthSocialFetcher", return_value=fake_fetcher),
        ):
            await main(["--once"])

        assert fake_fetcher.calls == [1]
        assert memory_backend.docs["last_seen_posts"][WATERMARK_FIELD] == "9"
        assert memory_backend.closed is True
