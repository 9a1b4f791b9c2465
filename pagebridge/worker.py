from __future__ import annotations

import asyncio
import logging
import random

from opentelemetry import trace

from pagebridge.core.config import Settings, get_settings
from pagebridge.core.telemetry import configure_logging, setup_telemetry, shutdown_telemetry
from pagebridge.jobs.site_sync import SiteSyncDeps, SiteSyncOptions, run_site_sync
from pagebridge.services.gsc_client import get_gsc_client
from pagebridge.services.repository import get_repository
from pagebridge.services.sanity_client import get_sanity_client

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def next_backoff(current: float, max_backoff: float) -> float:
    jitter = random.uniform(0.0, 0.5)
    return min(current * (2.0 + jitter), max_backoff)


async def run_cycle(settings: Settings, deps: SiteSyncDeps) -> int:
    """Sync every configured site once. Returns the number of sites that failed."""
    failures = 0
    for site_url in settings.site_urls:
        with tracer.start_as_current_span("worker.sync_site") as span:
            span.set_attribute("site.url", site_url)
            try:
                await run_site_sync(site_url, SiteSyncOptions.from_settings(settings), deps)
            except Exception:
                failures += 1
                span.set_attribute("worker.failed", True)
                logger.exception("site sync failed site=%s", site_url)
    return failures


async def run_worker() -> None:
    settings = get_settings()
    configure_logging()
    telemetry_runtime = setup_telemetry(settings)
    repository = get_repository()
    sanity = get_sanity_client()
    deps = SiteSyncDeps(settings=settings, repository=repository, sanity=sanity, gsc=get_gsc_client())

    if not settings.site_urls:
        logger.warning("no sites configured; set PB_SITE_URLS")

    base_delay = max(1.0, min(60.0, settings.sync_interval_seconds))
    backoff = base_delay
    schema_ready = False

    try:
        while True:
            try:
                with tracer.start_as_current_span("worker.sync_cycle"):
                    if not schema_ready:
                        await repository.ensure_schema()
                        schema_ready = True
                    failures = await run_cycle(settings, deps)
                if failures:
                    sleep_for = next_backoff(backoff, settings.max_backoff_seconds)
                    logger.warning("sync cycle had %s failed site(s); retry in %.1fs", failures, sleep_for)
                    backoff = sleep_for
                else:
                    backoff = base_delay
                    sleep_for = settings.sync_interval_seconds
                await asyncio.sleep(sleep_for)
            except Exception as exc:
                sleep_for = next_backoff(backoff, settings.max_backoff_seconds)
                logger.exception("worker iteration failed: %s; retry in %.1fs", exc, sleep_for)
                await asyncio.sleep(sleep_for)
                backoff = sleep_for
    finally:
        await sanity.close()
        await repository.close()
        shutdown_telemetry(telemetry_runtime)


if __name__ == "__main__":
    asyncio.run(run_worker())
