import logging
from collections import Counter
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from errors import InvalidTransitionError, NotFoundError
from models import OPEN_ALERT_STATUSES, Alert, AlertSeverity, AlertStatus, as_utc, utcnow

logger = logging.getLogger(__name__)

# Allowed predecessors for each target status. Resolved is terminal.
TRANSITIONS: dict[AlertStatus, tuple[str, ...]] = {
    AlertStatus.ACKNOWLEDGED: (AlertStatus.NEW.value,),
    AlertStatus.RESOLVED: OPEN_ALERT_STATUSES,
}


class AlertManager:
    """Sole mutation surface for alerts: create plus the forward-only status transitions."""

    __slots__ = ("_session",)

    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(
        self,
        device_id: str,
        parameter_type: str,
        value: float,
        threshold: float,
        severity: AlertSeverity,
        message: str,
        status: AlertStatus = AlertStatus.NEW,
        now: datetime | None = None,
    ) -> Alert:
        alert = Alert(
            device_id=device_id,
            timestamp=now or utcnow(),
            parameter_type=parameter_type,
            value=value,
            threshold=threshold,
            severity=severity.value,
            status=status.value,
            message=message,
        )
        self._session.add(alert)
        await self._session.flush()
        return alert

    async def get(self, alert_id: int) -> Alert:
        alert = await self._session.get(Alert, alert_id)
        if alert is None:
            raise NotFoundError("Alert", alert_id)
        return alert

    def _transition(self, alert: Alert, target: AlertStatus) -> None:
        if alert.status not in TRANSITIONS[target]:
            raise InvalidTransitionError(alert.id, alert.status, target.value)
        alert.status = target.value

    async def acknowledge(self, alert_id: int) -> Alert:
        alert = await self.get(alert_id)
        self._transition(alert, AlertStatus.ACKNOWLEDGED)
        await self._session.flush()
        return alert

    async def resolve(self, alert_id: int) -> Alert:
        alert = await self.get(alert_id)
        self._transition(alert, AlertStatus.RESOLVED)
        await self._session.flush()
        return alert

    async def resolve_all_for_device(self, device_id: str) -> tuple[int, str]:
        result = await self._session.execute(
            select(Alert).where(Alert.device_id == device_id, Alert.status.in_(OPEN_ALERT_STATUSES))
        )
        open_alerts = result.scalars().all()
        for alert in open_alerts:
            alert.status = AlertStatus.RESOLVED.value
        await self._session.flush()
        count = len(open_alerts)
        if count:
            logger.info("Resolved %s open alert(s) for device %s", count, device_id)
        return count, f"Resolved {count} open alert(s) for device {device_id}"

    async def batch_update_status(self, alert_ids: list[int], status: AlertStatus) -> list[dict]:
        """Apply one transition to many alerts, recording a result per id instead of failing the batch."""
        if status not in TRANSITIONS:
            error = f"Alerts cannot be moved to '{status.value}'"
            return [{"id": alert_id, "success": False, "error": error} for alert_id in alert_ids]
        results = []
        for alert_id in alert_ids:
            try:
                alert = await self.get(alert_id)
                self._transition(alert, status)
            except (NotFoundError, InvalidTransitionError) as exc:
                results.append({"id": alert_id, "success": False, "error": str(exc)})
            else:
                results.append({"id": alert_id, "success": True, "error": None})
        await self._session.flush()
        return results

    async def list_alerts(
        self,
        status: AlertStatus | None = None,
        device_id: str | None = None,
        limit: int = 50,
    ) -> list[Alert]:
        stmt = select(Alert)
        if status is not None:
            stmt = stmt.where(Alert.status == status.value)
        if device_id is not None:
            stmt = stmt.where(Alert.device_id == device_id)
        stmt = stmt.order_by(Alert.timestamp.desc(), Alert.id.desc()).limit(limit)
        return list((await self._session.execute(stmt)).scalars().all())

    async def summary(self) -> dict:
        alerts = (await self._session.execute(select(Alert))).scalars().all()
        by_status = Counter({s.value: 0 for s in AlertStatus})
        by_severity = Counter({s.value: 0 for s in AlertSeverity})
        by_parameter: Counter[str] = Counter()
        for alert in alerts:
            by_status[alert.status] += 1
            by_severity[alert.severity] += 1
            by_parameter[alert.parameter_type] += 1
        recent = sorted(alerts, key=lambda a: (as_utc(a.timestamp), a.id), reverse=True)[:5]
        return {
            "total": len(alerts),
            "by_status": dict(by_status),
            "by_severity": dict(by_severity),
            "by_parameter": dict(by_parameter),
            "recent": recent,
        }

    async def trends(self, days: int, now: datetime) -> list[dict]:
        """Alert counts per day by severity for the ``days`` days ending at ``now``, oldest first."""
        start = now - timedelta(days=days)
        result = await self._session.execute(
            select(Alert).where(Alert.timestamp >= start, Alert.timestamp <= now)
        )
        buckets = [Counter() for _ in range(days)]
        for alert in result.scalars().all():
            # An alert stamped exactly at ``now`` belongs to the last day.
            index = min((as_utc(alert.timestamp) - start) // timedelta(days=1), days - 1)
            buckets[index][alert.severity] += 1
        return [
            {
                "date": (start + timedelta(days=i)).date().isoformat(),
                "day_start": start + timedelta(days=i),
                "total": sum(counts.values()),
                **{severity.value: counts[severity.value] for severity in AlertSeverity},
            }
            for i, counts in enumerate(buckets)
        ]
