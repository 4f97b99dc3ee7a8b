"""
Device liveness: the online -> offline transition driven by a recurring scan,
and the offline -> online recovery recorded whenever fresh data arrives.
"""
import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from alerts import AlertManager
from database import get_settings
from models import AlertSeverity, AlertStatus, Device, DeviceStatus, ScheduledTask, as_utc, utcnow
from parameters import DEVICE_STATUS
from scheduler import prune_finished, register, schedule

logger = logging.getLogger(__name__)

SCAN_TASK = "liveness.scan"


async def mark_device_alive(session: AsyncSession, device: Device, now: datetime) -> bool:
    """Record activity for ``device``. Returns True if it was offline and just recovered.

    A recovery writes an info alert that is already resolved; it is an audit
    record, not something to act on.
    """
    was_offline = device.status == DeviceStatus.OFFLINE.value
    device.status = DeviceStatus.ONLINE.value
    device.last_active = now
    if was_offline:
        await AlertManager(session).create(
            device_id=device.id,
            parameter_type=DEVICE_STATUS,
            value=1,
            threshold=0,
            severity=AlertSeverity.INFO,
            status=AlertStatus.RESOLVED,
            message=f"Device {device.name} ({device.id}) is back online",
            now=now,
        )
        logger.info("Device %s is back online", device.id)
    return was_offline


async def mark_offline(session: AsyncSession, device_id: str, now: datetime, threshold: timedelta) -> bool:
    device = await session.get(Device, device_id)
    # Only online devices can go offline, so an offline period yields one alert.
    if device is None or device.status != DeviceStatus.ONLINE.value:
        return False
    last_active = as_utc(device.last_active)
    if now - last_active <= threshold:
        return False
    device.status = DeviceStatus.OFFLINE.value
    await AlertManager(session).create(
        device_id=device.id,
        parameter_type=DEVICE_STATUS,
        value=0,
        threshold=1,
        severity=AlertSeverity.HIGH,
        message=f"Device {device.name} ({device.id}) went offline, last active {last_active.isoformat()}",
        now=now,
    )
    logger.warning("[ALERT] Device %s offline - last active %s", device.id, last_active.isoformat())
    return True


async def run_liveness_scan(
    session_factory: async_sessionmaker,
    now: datetime | None = None,
    threshold: timedelta | None = None,
) -> list[str]:
    """Flip stale online devices to offline. Returns the ids that changed.

    Each device is handled in its own transaction so one failure does not
    abort the rest of the scan.
    """
    now = now or utcnow()
    if threshold is None:
        threshold = timedelta(seconds=get_settings().offline_threshold_seconds)
    cutoff = now - threshold

    async with session_factory() as session:
        result = await session.execute(
            select(Device.id).where(
                Device.status == DeviceStatus.ONLINE.value, Device.last_active < cutoff
            )
        )
        candidates = result.scalars().all()

    went_offline = []
    for device_id in candidates:
        async with session_factory() as session:
            try:
                if await mark_offline(session, device_id, now, threshold):
                    await session.commit()
                    went_offline.append(device_id)
            except Exception:
                await session.rollback()
                logger.exception("Liveness check failed for device %s", device_id)
    return went_offline


async def ensure_liveness_scheduled(session_factory: async_sessionmaker, run_at: datetime) -> bool:
    async with session_factory() as session:
        task = await schedule(session, SCAN_TASK, run_at, key=SCAN_TASK)
        await session.commit()
    return task is not None


async def prune_task_history(session_factory: async_sessionmaker, now: datetime) -> int:
    retention = timedelta(seconds=get_settings().task_retention_seconds)
    async with session_factory() as session:
        removed = await prune_finished(session, now - retention)
        await session.commit()
    if removed:
        logger.debug("Pruned %s finished task(s)", removed)
    return removed


@register(SCAN_TASK)
async def liveness_task(session_factory: async_sessionmaker, task: ScheduledTask, now: datetime) -> None:
    # Re-arm before scanning so a failing scan cannot end the chain.
    interval = timedelta(seconds=get_settings().liveness_interval_seconds)
    await ensure_liveness_scheduled(session_factory, now + interval)
    await run_liveness_scan(session_factory, now)
    await prune_task_history(session_factory, now)
