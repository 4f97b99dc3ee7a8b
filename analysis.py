"""
Statistics over stored readings and statistical anomaly detection.

Anomaly detection works per device over a lookback window: for each
parameter with at least MIN_POINTS values the window's mean and population
standard deviation are computed, and each of the latest RECENT_POINTS
readings is flagged when it lies more than ANOMALY_SIGMA deviations away.
"""
import logging
import math
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from alerts import AlertManager
from models import Alert, AlertSeverity, AlertStatus, Reading, as_utc
from parameters import PARAMETERS, Parameter

logger = logging.getLogger(__name__)

MIN_POINTS = 5
RECENT_POINTS = 5
ANOMALY_SIGMA = 3.0
ANOMALY_DEDUPE_WINDOW = timedelta(hours=2)
TREND_SLOPE = 0.05
DEFAULT_LOOKBACK = timedelta(hours=24)

# Flow rate swings with the tide and is left out.
ANOMALY_PARAMETERS = (
    Parameter.TEMPERATURE,
    Parameter.SALINITY,
    Parameter.DISSOLVED_OXYGEN,
    Parameter.PH,
    Parameter.TURBIDITY,
)


class Trend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"
    INSUFFICIENT_DATA = "insufficient_data"


@dataclass(frozen=True)
class Anomaly:
    device_id: str
    parameter: Parameter
    timestamp: datetime
    value: float
    mean: float
    std_dev: float

    @property
    def deviation(self) -> float:
        return (self.value - self.mean) / self.std_dev

    @property
    def severity(self) -> AlertSeverity:
        spread = abs(self.deviation)
        if spread > 5:
            return AlertSeverity.HIGH
        if spread > 4:
            return AlertSeverity.MEDIUM
        return AlertSeverity.LOW

    @property
    def threshold(self) -> float:
        """The 3-sigma bound the value crossed."""
        sign = 1 if self.value > self.mean else -1
        return self.mean + sign * ANOMALY_SIGMA * self.std_dev

    @property
    def message(self) -> str:
        unit = PARAMETERS[self.parameter].unit
        direction = "above" if self.value > self.mean else "below"
        return (
            f"{self.parameter.value} anomaly: {self.value:.2f} {unit} is {abs(self.deviation):.1f} "
            f"standard deviations {direction} the mean of {self.mean:.2f} {unit}"
        )


@dataclass
class AnomalyReport:
    anomalies: list[Anomaly] = field(default_factory=list)
    alerts: list[Alert] = field(default_factory=list)
    readings_checked: int = 0


def mean_and_std(values: Sequence[float]) -> tuple[float, float]:
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def trend(values: Sequence[float]) -> Trend:
    """Classify a series by the slope of its least-squares line against sample index."""
    n = len(values)
    if n < 3:
        return Trend.INSUFFICIENT_DATA
    sum_x = n * (n - 1) / 2
    sum_xx = (n - 1) * n * (2 * n - 1) / 6
    sum_y = sum(values)
    sum_xy = sum(i * v for i, v in enumerate(values))
    slope = (n * sum_xy - sum_x * sum_y) / (n * sum_xx - sum_x * sum_x)
    if slope > TREND_SLOPE:
        return Trend.INCREASING
    if slope < -TREND_SLOPE:
        return Trend.DECREASING
    return Trend.STABLE


def find_anomalies(readings: Sequence[Reading]) -> list[Anomaly]:
    """Anomalies among the latest readings of one device; ``readings`` ordered oldest first."""
    stats: dict[Parameter, tuple[float, float]] = {}
    for parameter in ANOMALY_PARAMETERS:
        values = [v for v in (getattr(r, parameter.value) for r in readings) if v is not None]
        if len(values) >= MIN_POINTS:
            stats[parameter] = mean_and_std(values)

    anomalies = []
    for reading in readings[-RECENT_POINTS:]:
        for parameter, (mean, std_dev) in stats.items():
            value = getattr(reading, parameter.value)
            if value is None or abs(value - mean) <= ANOMALY_SIGMA * std_dev:
                continue
            anomalies.append(
                Anomaly(
                    device_id=reading.device_id,
                    parameter=parameter,
                    timestamp=as_utc(reading.timestamp),
                    value=value,
                    mean=mean,
                    std_dev=std_dev,
                )
            )
    return anomalies


async def _has_recent_open_alert(session: AsyncSession, anomaly: Anomaly, now: datetime) -> bool:
    alert_id = await session.scalar(
        select(Alert.id)
        .where(
            Alert.device_id == anomaly.device_id,
            Alert.parameter_type == anomaly.parameter.value,
            Alert.status != AlertStatus.RESOLVED.value,
            Alert.timestamp >= now - ANOMALY_DEDUPE_WINDOW,
        )
        .limit(1)
    )
    return alert_id is not None


async def detect_anomalies(
    session: AsyncSession,
    now: datetime,
    device_id: str | None = None,
    lookback: timedelta = DEFAULT_LOOKBACK,
) -> AnomalyReport:
    """Scan recent readings and raise one alert per anomaly.

    Alerts are stamped with the detection time. A parameter that already has
    an unresolved alert from the last two hours gets no new alert.
    """
    stmt = select(Reading).where(Reading.timestamp >= now - lookback, Reading.timestamp <= now)
    if device_id is not None:
        stmt = stmt.where(Reading.device_id == device_id)
    stmt = stmt.order_by(Reading.device_id, Reading.timestamp, Reading.id)
    rows = (await session.execute(stmt)).scalars().all()

    by_device: dict[str, list[Reading]] = {}
    for reading in rows:
        by_device.setdefault(reading.device_id, []).append(reading)

    report = AnomalyReport(readings_checked=len(rows))
    manager = AlertManager(session)
    for readings in by_device.values():
        for anomaly in find_anomalies(readings):
            report.anomalies.append(anomaly)
            if await _has_recent_open_alert(session, anomaly, now):
                continue
            report.alerts.append(
                await manager.create(
                    device_id=anomaly.device_id,
                    parameter_type=anomaly.parameter.value,
                    value=round(anomaly.value, 2),
                    threshold=round(anomaly.threshold, 2),
                    severity=anomaly.severity,
                    message=anomaly.message,
                    now=now,
                )
            )
    if report.alerts:
        logger.info("Anomaly scan raised %s alert(s) from %s anomalies", len(report.alerts), len(report.anomalies))
    return report


async def parameter_statistics(
    session: AsyncSession,
    parameter: Parameter,
    start_time: datetime,
    end_time: datetime,
    device_id: str | None = None,
) -> dict:
    column = getattr(Reading, parameter.value)
    stmt = (
        select(column)
        .where(Reading.timestamp >= start_time, Reading.timestamp <= end_time, column.is_not(None))
        .order_by(Reading.timestamp, Reading.id)
    )
    if device_id is not None:
        stmt = stmt.where(Reading.device_id == device_id)
    values = list((await session.execute(stmt)).scalars().all())

    result = {
        "parameter": parameter,
        "device_id": device_id,
        "count": len(values),
        "average": None,
        "minimum": None,
        "maximum": None,
        "standard_deviation": None,
        "trend": trend(values),
    }
    if values:
        mean, std_dev = mean_and_std(values)
        result.update(average=mean, minimum=min(values), maximum=max(values), standard_deviation=std_dev)
    return result
