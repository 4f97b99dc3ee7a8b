"""
Per-device simulation loop.

While a device's is_simulating flag is set, each tick writes one synthetic
reading and enqueues the next tick. Ticks for a device form a single chain:
the first one is enqueued only by the start call that flips the flag from
false to true, every later one only by the tick before it. Stopping clears
the flag; the next tick sees it and does not re-arm.

Consistency note: a tick commits its reading, device patch, alerts and
successor in one transaction. If the re-arm after a failed tick itself
fails, the device stays flagged but has no pending tick until the worker
restarts and calls resume_simulations().
"""
import logging
import random
from collections import deque
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts import AlertManager
from database import get_settings
from devices import get_device
from generator import ReadingGenerator
from liveness import mark_device_alive
from models import Device, DeviceStatus, ScheduledTask, as_utc, utcnow
from readings import recent_readings, store_reading
from scheduler import cancel_pending, has_pending, register, schedule

logger = logging.getLogger(__name__)

TICK_TASK = "simulation.tick"
MAX_HISTORICAL_POINTS = 10_000

_generator = ReadingGenerator()


def tick_key(device_id: str) -> str:
    return f"{TICK_TASK}:{device_id}"


def tick_interval() -> timedelta:
    return timedelta(seconds=get_settings().simulation_interval_seconds)


async def start_simulation(session: AsyncSession, device_id: str, now: datetime | None = None) -> dict:
    now = now or utcnow()
    device = await get_device(session, device_id)
    was_offline = device.status == DeviceStatus.OFFLINE.value

    # Compare-and-set so two concurrent starts cannot both see the flag as false.
    result = await session.execute(
        update(Device)
        .where(Device.id == device_id, Device.is_simulating.is_(False))
        .values(is_simulating=True)
        .execution_options(synchronize_session=False)
    )
    claimed = result.rowcount == 1
    if claimed:
        device.is_simulating = True

    device.status = DeviceStatus.ONLINE.value
    device.last_active = now

    resolved = 0
    if was_offline:
        resolved, _ = await AlertManager(session).resolve_all_for_device(device_id)

    scheduled = False
    if claimed:
        task = await schedule(session, TICK_TASK, now, tick_key(device_id), device_id=device_id, now=now)
        scheduled = task is not None
        logger.info("Simulation started for device %s", device_id)
    await session.flush()
    return {
        "device_id": device_id,
        "is_simulating": True,
        "already_simulating": not claimed,
        "tick_scheduled": scheduled,
        "resolved_alerts": resolved,
    }


async def stop_simulation(session: AsyncSession, device_id: str, now: datetime | None = None) -> dict:
    device = await get_device(session, device_id)
    was_simulating = device.is_simulating
    device.is_simulating = False
    # Optional: the flag check in the tick is what actually ends the loop.
    cancelled = await cancel_pending(session, tick_key(device_id), now)
    await session.flush()
    if was_simulating:
        logger.info("Simulation stopped for device %s", device_id)
    return {
        "device_id": device_id,
        "is_simulating": False,
        "was_simulating": was_simulating,
        "cancelled_ticks": cancelled,
    }


async def _rearm_after_failure(session_factory: async_sessionmaker, device_id: str, run_at: datetime, now: datetime) -> None:
    try:
        async with session_factory() as session:
            device = await session.get(Device, device_id)
            if device is not None and device.is_simulating:
                await schedule(session, TICK_TASK, run_at, tick_key(device_id), device_id=device_id, now=now)
                await session.commit()
    except Exception:
        logger.exception("Could not re-arm simulation for device %s", device_id)


async def run_generation_tick(
    session_factory: async_sessionmaker,
    device_id: str,
    now: datetime | None = None,
    generator: ReadingGenerator | None = None,
) -> bool:
    """Run one tick. Returns True if the next tick was scheduled."""
    now = now or utcnow()
    settings = get_settings()
    next_run = now + tick_interval()
    generator = generator or _generator

    async with session_factory() as session:
        try:
            device = await session.get(Device, device_id)
            if device is None or not device.is_simulating:
                logger.info("Simulation loop for device %s ended", device_id)
                return False

            history = await recent_readings(session, device_id, settings.history_size)
            generated = generator.generate(device, now, history)

            if await mark_device_alive(session, device, now):
                await AlertManager(session).resolve_all_for_device(device_id)

            await store_reading(
                session,
                device_id=device_id,
                timestamp=generated.timestamp,
                latitude=generated.latitude,
                longitude=generated.longitude,
                depth=generated.depth,
                values=generated.values,
                now=now,
            )
            await schedule(session, TICK_TASK, next_run, tick_key(device_id), device_id=device_id, now=now)
            await session.commit()
            return True
        except Exception:
            await session.rollback()
            await _rearm_after_failure(session_factory, device_id, next_run, now)
            raise


@register(TICK_TASK)
async def generation_tick_task(session_factory: async_sessionmaker, task: ScheduledTask, now: datetime) -> None:
    await run_generation_tick(session_factory, task.device_id, now)


async def resume_simulations(session_factory: async_sessionmaker, now: datetime | None = None) -> list[str]:
    """Give every simulating device without a pending tick a fresh one."""
    now = now or utcnow()
    resumed = []
    async with session_factory() as session:
        device_ids = (
            await session.execute(select(Device.id).where(Device.is_simulating.is_(True)))
        ).scalars().all()
        for device_id in device_ids:
            if await has_pending(session, tick_key(device_id)):
                continue
            await schedule(session, TICK_TASK, now, tick_key(device_id), device_id=device_id, now=now)
            resumed.append(device_id)
        await session.commit()
    if resumed:
        logger.info("Resumed simulation for %s device(s)", len(resumed))
    return resumed


async def generate_historical(
    session: AsyncSession,
    device_id: str,
    days: int,
    points_per_day: int,
    start: datetime | None = None,
    rng: random.Random | None = None,
) -> int:
    """Backfill evenly spaced synthetic readings. They are threshold-annotated but raise no alerts."""
    total = days * points_per_day
    if total > MAX_HISTORICAL_POINTS:
        raise ValueError(f"At most {MAX_HISTORICAL_POINTS} points can be generated per request")
    device = await get_device(session, device_id)
    start = as_utc(start) if start else utcnow() - timedelta(days=days)
    step = timedelta(days=1) / points_per_day
    generator = ReadingGenerator(rng) if rng is not None else _generator
    history: deque = deque(maxlen=get_settings().history_size)

    for i in range(total):
        timestamp = start + step * i
        generated = generator.generate(device, timestamp, list(history))
        reading, _ = await store_reading(
            session,
            device_id=device_id,
            timestamp=generated.timestamp,
            latitude=generated.latitude,
            longitude=generated.longitude,
            depth=generated.depth,
            values=generated.values,
            raise_alerts=False,
        )
        history.append(reading)
    logger.info("Generated %s historical readings for device %s", total, device_id)
    return total
