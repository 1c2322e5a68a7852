"""
Application entry point — wires dependencies and runs one lookup or the scheduler.

Composition root: the only place where concrete adapters are created.

Responsibilities:
  1. Load and validate configuration from the environment
  2. Configure structlog
  3. Wire JsonCatalog → RemoteSync → RemoteFetch
  4. Either print the path of the newest verified bundle, or (scheduler
     enabled) keep the catalog fresh on a cron schedule
"""

from __future__ import annotations

import asyncio
import logging
import sys

import structlog
from pydantic import ValidationError

from certainty import __version__
from certainty.adapters.catalog import JsonCatalog
from certainty.config import AppSettings
from certainty.errors import CertaintyError
from certainty.fetch import Fetch
from certainty.scheduler import create_scheduler
from certainty.sync import RemoteFetch, RemoteSync


def configure_structlog(log_level: str = "INFO") -> None:
    """Configure structlog for colored, human-readable console output on stderr."""
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


def create_remote_fetch(settings: AppSettings) -> RemoteFetch:
    """
    Build the orchestrator for the configured data directory.

    The sync transport trusts the newest locally verified bundle (digest and
    signature only, no network) and falls back to certifi when there is none.
    """
    catalog = JsonCatalog(settings.data_dir)
    anchors = settings.trust_anchors()
    trust_source = Fetch(catalog, trust_channel=settings.trust_channel, anchors=anchors)
    sync = RemoteSync(
        catalog,
        url=settings.remote.url,
        cache_ttl=settings.remote.cache_ttl_seconds,
        connect_timeout=settings.remote.connect_timeout_seconds,
        trust_source=trust_source,
    )
    return RemoteFetch(catalog, sync, trust_channel=settings.trust_channel, anchors=anchors)


async def latest_bundle_path(settings: AppSettings) -> str:
    fetch = create_remote_fetch(settings)
    bundle = await fetch.get_latest_bundle(
        check_signature=settings.checks.signature,
        check_chronicle=settings.checks.chronicle,
    )
    return str(bundle.file_path)


def main() -> None:
    """Print the newest verified bundle, or run the refresh scheduler."""
    try:
        settings = AppSettings()
    except ValidationError as e:
        print(f"FATAL: Configuration error — {e}", file=sys.stderr)  # noqa: T201
        sys.exit(1)

    configure_structlog(settings.log_level)
    log = structlog.get_logger()
    log.info(
        "app.starting",
        version=__version__,
        data_dir=str(settings.data_dir),
        trust_channel=settings.trust_channel,
        scheduler_enabled=settings.scheduler.enabled,
    )

    if settings.scheduler.enabled:
        fetch = create_remote_fetch(settings)
        scheduler = create_scheduler(
            refresh_fn=lambda: asyncio.run(fetch.sync.refresh()),
            cron=settings.scheduler.cron,
            run_on_startup=settings.scheduler.run_on_startup,
        )
        log.info("app.scheduler_starting", cron=settings.scheduler.cron)
        try:
            scheduler.start()
        except KeyboardInterrupt:
            log.info("app.shutdown", reason="signal received")
        return

    try:
        path = asyncio.run(latest_bundle_path(settings))
    except CertaintyError as e:
        log.error("app.failed", error=str(e), error_type=type(e).__name__)
        sys.exit(1)
    print(path)  # noqa: T201


if __name__ == "__main__":
    main()
