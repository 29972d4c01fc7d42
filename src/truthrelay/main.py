"""Main entry point for truthrelay."""

import argparse
import asyncio
import contextlib
import signal

from truthrelay.config import Settings, get_settings
from truthrelay.constants import DOMAIN_FETCH_CONFIG
from truthrelay.logging import get_logger, setup_logging
from truthrelay.notify.base import NotificationSink
from truthrelay.notify.discord import DiscordSink
from truthrelay.notify.log_sink import LogSink
from truthrelay.relay.governor import DomainPolicy, ErrorRateGovernor
from truthrelay.relay.pipeline import RelayPipeline
from truthrelay.relay.sequencer import Sequencer
from truthrelay.scheduler import Scheduler
from truthrelay.sources.truthsocial import TruthSocialFetcher
from truthrelay.state.backends import CouchDBBackend, DocumentBackend, PostgresBackend
from truthrelay.state.store import WatermarkStore

log = get_logger("truthrelay.main")

# How long --once waits for the Discord gateway before giving up on it
ONCE_SINK_READY_TIMEOUT = 30.0


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="truthrelay",
        description="Relay new Truth Social posts to Discord.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="run a single forced cycle and exit",
    )
    return parser.parse_args(argv)


def build_governor(settings: Settings) -> ErrorRateGovernor:
    """Create the governor; a missing credential is reported once per streak."""
    governor = ErrorRateGovernor(
        DomainPolicy(
            threshold=settings.error_report_threshold,
            cooldown_seconds=settings.error_suppress_seconds,
        )
    )
    governor.register(DOMAIN_FETCH_CONFIG, DomainPolicy(threshold=0))
    return governor


def build_backend(settings: Settings) -> DocumentBackend:
    if settings.state_backend == "postgres":
        return PostgresBackend(settings.postgres_dsn)
    return CouchDBBackend(
        settings.couchdb_url,
        settings.couchdb_database,
        username=settings.couchdb_username,
        password=settings.couchdb_password.get_secret_value(),
    )


def build_sink(settings: Settings, fetcher: TruthSocialFetcher) -> NotificationSink:
    """Pick the Discord sink, or the log sink for dry runs and missing tokens."""
    if settings.dry_run:
        return LogSink()
    if settings.discord_token is None:
        log.warning("discord_token_missing", fallback="log")
        return LogSink()
    if settings.discord_channel_id is None:
        log.warning("discord_channel_missing")
    return DiscordSink(
        channel_id=settings.discord_channel_id,
        display_name=settings.tracked_display_name,
        profile_url=fetcher.profile_url,
    )


async def main(argv: list[str] | None = None) -> None:
    """Main application entry point."""
    args = parse_args(argv)
    setup_logging()

    settings = get_settings()
    log.info(
        "starting_truthrelay",
        environment=settings.environment,
        handle=settings.tracked_handle,
        state_backend=settings.state_backend,
        poll_interval_minutes=settings.poll_interval_minutes,
        dry_run=settings.dry_run,
        once=args.once,
    )

    governor = build_governor(settings)
    api_key = settings.scrapecreators_api_key
    fetcher = TruthSocialFetcher(
        api_key.get_secret_value() if api_key else None,
        settings.tracked_handle,
        base_url=settings.scrapecreators_base_url,
        timeout=settings.upstream_timeout_seconds,
    )
    if not fetcher.configured:
        log.warning("scrapecreators_api_key_missing")

    store = WatermarkStore(
        build_backend(settings),
        governor,
        doc_id=settings.state_doc_id,
        compare=fetcher.compare,
    )
    sink = build_sink(settings, fetcher)
    pipeline = RelayPipeline(
        fetcher,
        Sequencer(store, fetcher.compare),
        sink,
        governor,
        fetch_limit=settings.fetch_limit,
    )
    scheduler = Scheduler(
        pipeline,
        settings.poll_interval_minutes,
        store=store,
        startup_grace_seconds=settings.startup_grace_seconds,
        reconnect_store=settings.store_reconnect,
        store_timeout=settings.store_init_timeout_seconds,
        store_retry_delay=settings.store_retry_delay_seconds,
    )

    # The store connects in the background while the sink logs in
    store_task = asyncio.create_task(
        store.initialize(
            timeout=settings.store_init_timeout_seconds,
            retry_delay=settings.store_retry_delay_seconds,
        ),
        name="truthrelay-store-init",
    )
    sink_task: asyncio.Task[None] | None = None
    if isinstance(sink, DiscordSink) and settings.discord_token is not None:
        sink_task = asyncio.create_task(
            sink.start(settings.discord_token.get_secret_value()),
            name="truthrelay-discord",
        )

    try:
        if args.once:
            await store_task
            if isinstance(sink, DiscordSink):
                await sink.wait_ready(ONCE_SINK_READY_TIMEOUT)
            await scheduler.run_once(force=True, limit=1)
        else:
            await _serve(scheduler, sink_task)
    finally:
        await scheduler.stop()
        if not store_task.done():
            store_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await store_task
        await sink.close()
        if sink_task is not None and not sink_task.cancelled():
            try:
                await sink_task
            except Exception as exc:
                log.warning("discord_client_error", error=str(exc))
        await store.close()
        log.info("truthrelay_stopped")


async def _serve(scheduler: Scheduler, sink_task: asyncio.Task[None] | None) -> None:
    """Run the scheduler until a termination signal arrives or the sink dies."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    scheduler.start()
    waiters: set[asyncio.Future[object]] = {asyncio.ensure_future(stop_event.wait())}
    if sink_task is not None:
        waiters.add(sink_task)  # type: ignore[arg-type]

    done, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
    if sink_task is not None and sink_task in done:
        exc = sink_task.exception()
        log.error("discord_client_stopped", error=str(exc) if exc else None)
    else:
        log.info("shutdown_requested")

    for waiter in pending:
        if waiter is not sink_task:
            waiter.cancel()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.remove_signal_handler(sig)


def run() -> None:
    """Run the application."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
