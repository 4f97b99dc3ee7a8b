"""
Background worker: drains the scheduled task queue (simulation ticks and
liveness scans) and keeps the recurring liveness scan armed.
Run: python -m worker
"""
import asyncio
import logging
import sys

import database
import liveness
import simulation
from models import utcnow
from scheduler import run_due_tasks

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger(__name__)


async def bootstrap() -> None:
    """Create tables, arm the liveness chain and restart any simulation left without a tick."""
    await database.create_tables()
    factory = database.async_session_factory
    now = utcnow()
    if await liveness.ensure_liveness_scheduled(factory, now):
        logger.info("Liveness scan scheduled")
    await simulation.resume_simulations(factory, now)


async def run_worker() -> None:
    database.init_db()
    settings = database.get_settings()
    await bootstrap()
    logger.info(
        "Worker started: polling every %ss, simulation ticks every %ss, devices offline after %ss",
        settings.worker_poll_seconds,
        settings.simulation_interval_seconds,
        settings.offline_threshold_seconds,
    )
    try:
        while True:
            try:
                await run_due_tasks(database.async_session_factory)
            except Exception as e:
                logger.exception("Error while running scheduled tasks: %s", e)
            await asyncio.sleep(settings.worker_poll_seconds)
    finally:
        await database.dispose_db()


def main() -> None:
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
