import logging
import math
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import AlertManager
from errors import NotFoundError
from liveness import mark_device_alive
from models import Alert, AlertSeverity, Device, Reading, ReadingStatus, as_utc
from parameters import PARAMETERS, Parameter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Breach:
    parameter: Parameter
    value: float
    threshold: float
    severity: AlertSeverity

    @property
    def message(self) -> str:
        unit = PARAMETERS[self.parameter].unit
        direction = "below" if self.value < self.threshold else "above"
        return (
            f"{self.parameter.value} reading {self.value:g} {unit} is {direction} "
            f"the {self.threshold:g} {unit} threshold"
        )


@dataclass
class IngestResult:
    reading: Reading
    alerts: list[Alert] = field(default_factory=list)
    recovered: bool = False
    resolved_alerts: int = 0


def breach_severity(value: float, bounds: tuple[float, float]) -> AlertSeverity:
    low, high = bounds
    bound = low if value < low else high
    excess = abs(value - bound) / (high - low)
    if excess < 0.1:
        return AlertSeverity.LOW
    if excess < 0.25:
        return AlertSeverity.MEDIUM
    return AlertSeverity.HIGH


def evaluate_thresholds(values: Mapping[Parameter, float | None]) -> list[Breach]:
    breaches = []
    for parameter, value in values.items():
        bounds = PARAMETERS[parameter].alert_range
        if bounds is None or value is None or not math.isfinite(value):
            continue
        low, high = bounds
        if low <= value <= high:
            continue
        breaches.append(
            Breach(
                parameter=parameter,
                value=value,
                threshold=low if value < low else high,
                severity=breach_severity(value, bounds),
            )
        )
    return breaches


async def store_reading(
    session: AsyncSession,
    device_id: str,
    timestamp: datetime,
    latitude: float,
    longitude: float,
    depth: float | None,
    values: Mapping[Parameter, float | None],
    now: datetime | None = None,
    raise_alerts: bool = True,
) -> tuple[Reading, list[Alert]]:
    breaches = evaluate_thresholds(values)
    reading = Reading(
        device_id=device_id,
        timestamp=timestamp,
        latitude=latitude,
        longitude=longitude,
        depth=depth,
        status=(ReadingStatus.ABNORMAL if breaches else ReadingStatus.NORMAL).value,
        **{parameter.value: value for parameter, value in values.items()},
    )
    session.add(reading)
    await session.flush()

    alerts = []
    if raise_alerts:
        manager = AlertManager(session)
        for breach in breaches:
            alerts.append(
                await manager.create(
                    device_id=device_id,
                    parameter_type=breach.parameter.value,
                    value=breach.value,
                    threshold=breach.threshold,
                    severity=breach.severity,
                    message=breach.message,
                    now=now,
                )
            )
    return reading, alerts


async def ingest_reading(session: AsyncSession, payload, now: datetime) -> IngestResult:
    """Accept an externally pushed reading (``schemas.ReadingCreate``).

    A reading proves the device is alive: it comes back online if needed and
    its open alerts are resolved before the new values are checked, so any
    breach in this reading stays open.
    """
    device = await session.get(Device, payload.device_id)
    if device is None:
        raise NotFoundError("Device", payload.device_id)

    recovered = await mark_device_alive(session, device, now)
    resolved, _ = await AlertManager(session).resolve_all_for_device(device.id)
    reading, alerts = await store_reading(
        session,
        device_id=device.id,
        timestamp=as_utc(payload.timestamp) if payload.timestamp else now,
        latitude=payload.location.latitude,
        longitude=payload.location.longitude,
        depth=payload.location.depth,
        values=payload.measurements(),
        now=now,
    )
    if alerts:
        logger.info("Reading %s from device %s raised %s alert(s)", reading.id, device.id, len(alerts))
    return IngestResult(reading=reading, alerts=alerts, recovered=recovered, resolved_alerts=resolved)


async def recent_readings(session: AsyncSession, device_id: str, limit: int) -> list[Reading]:
    """Newest ``limit`` readings for a device, returned oldest first."""
    result = await session.execute(
        select(Reading)
        .where(Reading.device_id == device_id)
        .order_by(Reading.timestamp.desc(), Reading.id.desc())
        .limit(limit)
    )
    return list(reversed(result.scalars().all()))


async def readings_in_range(
    session: AsyncSession, device_id: str, start_time: datetime, end_time: datetime
) -> list[Reading]:
    stmt = (
        select(Reading)
        .where(
            Reading.device_id == device_id,
            Reading.timestamp >= start_time,
            Reading.timestamp <= end_time,
        )
        .order_by(Reading.timestamp, Reading.id)
    )
    return list((await session.execute(stmt)).scalars().all())
