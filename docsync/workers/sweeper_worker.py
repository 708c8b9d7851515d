from __future__ import annotations

import logging

from arq import cron
from arq.connections import RedisSettings

from docsync.core.config import get_settings
from docsync.core.errors import ConfigError
from docsync.core.logging import configure_logging
from docsync.persistence.db import SessionLocal
from docsync.services.sweeper import build_sweeper


logger = logging.getLogger(__name__)


def sweep_hours(interval_hours: int) -> set[int]:
    # arq cron matches wall-clock fields, so express the interval as hours of the day.
    if interval_hours < 1 or 24 % interval_hours != 0:
        raise ConfigError(f"sweeper_interval_hours must divide 24, got {interval_hours}")
    return set(range(0, 24, interval_hours))


async def sweep(ctx) -> dict[str, int]:
    sweeper = ctx.get("sweeper")
    if sweeper is None:
        sweeper = build_sweeper(session_factory=SessionLocal)
    report = await sweeper.run_once()
    return report.as_dict()


async def _startup(ctx) -> None:
    # Build the blob client once per worker process.
    configure_logging()
    ctx["sweeper"] = build_sweeper(session_factory=SessionLocal)
    logger.info("sweeper_worker_started interval_hours=%s", get_settings().sweeper_interval_hours)


async def _shutdown(ctx) -> None:
    ctx.pop("sweeper", None)
    logger.info("sweeper_worker_stopped")


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.sweeper_queue_name
    functions = [sweep]
    cron_jobs = [
        cron(
            sweep,
            hour=sweep_hours(settings.sweeper_interval_hours),
            minute=0,
            run_at_startup=True,
            unique=True,
        )
    ]
    on_startup = _startup
    on_shutdown = _shutdown
