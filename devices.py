import logging
import uuid
from datetime import datetime, timedelta

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import AlertManager
from errors import ConflictError, NotFoundError
from models import Alert, AlertStatus, Device, DeviceStatus, Reading, as_utc
from scheduler import cancel_pending

logger = logging.getLogger(__name__)

RECENT_ACTIVITY = timedelta(hours=1)
STALE_ACTIVITY = timedelta(hours=24)
HEALTH_WINDOW = timedelta(days=7)


async def get_device(session: AsyncSession, device_id: str) -> Device:
    device = await session.get(Device, device_id)
    if device is None:
        raise NotFoundError("Device", device_id)
    return device


async def list_devices(session: AsyncSession, status: DeviceStatus | None = None) -> list[Device]:
    stmt = select(Device).order_by(Device.name, Device.id)
    if status is not None:
        stmt = stmt.where(Device.status == status.value)
    return list((await session.execute(stmt)).scalars().all())


async def list_simulating(session: AsyncSession) -> list[Device]:
    stmt = select(Device).where(Device.is_simulating.is_(True)).order_by(Device.name, Device.id)
    return list((await session.execute(stmt)).scalars().all())


async def register_device(session: AsyncSession, data, now: datetime) -> Device:
    """Create a device from ``schemas.DeviceCreate``; it starts online and not simulating."""
    device_id = data.device_id or uuid.uuid4().hex
    if await session.get(Device, device_id) is not None:
        raise ConflictError(f"Device {device_id} already exists")
    device = Device(
        id=device_id,
        name=data.name,
        type=data.type,
        latitude=data.location.latitude,
        longitude=data.location.longitude,
        depth=data.location.depth,
        location_description=data.location.description,
        status=DeviceStatus.ONLINE.value,
        last_active=now,
        battery_level=data.battery_level,
        is_simulating=False,
        sample_rate=data.config.sample_rate,
        upload_interval=data.config.upload_interval,
        parameters=[p.value for p in data.config.parameters],
    )
    session.add(device)
    await session.flush()
    logger.info("Registered device %s (%s)", device.id, device.name)
    return device


async def update_device(session: AsyncSession, device_id: str, data) -> Device:
    device = await get_device(session, device_id)
    if data.name is not None:
        device.name = data.name
    if data.type is not None:
        device.type = data.type
    if data.location is not None:
        device.latitude = data.location.latitude
        device.longitude = data.location.longitude
        device.depth = data.location.depth
        device.location_description = data.location.description
    if data.config is not None:
        device.sample_rate = data.config.sample_rate
        device.upload_interval = data.config.upload_interval
        device.parameters = [p.value for p in data.config.parameters]
    await session.flush()
    return device


async def update_device_status(
    session: AsyncSession,
    device_id: str,
    status: DeviceStatus,
    now: datetime,
    battery_level: float | None = None,
) -> tuple[Device, int]:
    """Manually patch status. Coming back from offline resolves the device's open alerts."""
    device = await get_device(session, device_id)
    previous = device.status
    device.status = status.value
    device.last_active = now
    if battery_level is not None:
        device.battery_level = battery_level
    resolved = 0
    if previous == DeviceStatus.OFFLINE.value and status == DeviceStatus.ONLINE:
        resolved, _ = await AlertManager(session).resolve_all_for_device(device.id)
    await session.flush()
    return device, resolved


async def delete_device(session: AsyncSession, device_id: str) -> dict:
    # Imported here: simulation imports this module for get_device.
    from simulation import tick_key

    device = await get_device(session, device_id)
    readings = await session.execute(delete(Reading).where(Reading.device_id == device_id))
    alerts = await session.execute(delete(Alert).where(Alert.device_id == device_id))
    await cancel_pending(session, tick_key(device_id))
    await session.delete(device)
    await session.flush()
    logger.info("Deleted device %s with %s readings and %s alerts", device_id, readings.rowcount, alerts.rowcount)
    return {
        "device_id": device_id,
        "deleted_readings": readings.rowcount,
        "deleted_alerts": alerts.rowcount,
        "message": f"Device {device.name} and its data were deleted",
    }


def activity_class(age: timedelta) -> str:
    if age < RECENT_ACTIVITY:
        return "normal"
    if age < STALE_ACTIVITY:
        return "warning"
    return "stale"


def health_score(device: Device, activity: str, open_alerts: int) -> int:
    score = 100
    if device.status != DeviceStatus.ONLINE.value:
        score -= 30
    if activity == "warning":
        score -= 15
    elif activity == "stale":
        score -= 30
    if device.battery_level is not None:
        if device.battery_level < 20:
            score -= 20
        elif device.battery_level < 50:
            score -= 10
    score -= min(30, open_alerts * 5)
    return max(0, min(100, score))


async def device_health(session: AsyncSession, now: datetime, device_id: str | None = None) -> list[dict]:
    devices = [await get_device(session, device_id)] if device_id else await list_devices(session)
    report = []
    for device in devices:
        age = now - as_utc(device.last_active)
        activity = activity_class(age)
        latest = await session.scalar(
            select(func.max(Reading.timestamp)).where(Reading.device_id == device.id)
        )
        recent_count = await session.scalar(
            select(func.count(Reading.id)).where(
                Reading.device_id == device.id, Reading.timestamp >= now - HEALTH_WINDOW
            )
        )
        open_alerts = await session.scalar(
            select(func.count(Alert.id)).where(
                Alert.device_id == device.id, Alert.status == AlertStatus.NEW.value
            )
        )
        report.append(
            {
                "id": device.id,
                "name": device.name,
                "type": device.type,
                "status": device.status,
                "health_score": health_score(device, activity, open_alerts or 0),
                "last_active": device.last_active,
                "last_active_age_seconds": age.total_seconds(),
                "activity": activity,
                "battery_level": device.battery_level,
                "readings_last_week": recent_count or 0,
                "open_alerts": open_alerts or 0,
                "latest_reading_at": latest,
            }
        )
    return report
