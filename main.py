import logging
from datetime import datetime, timedelta
from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

import analysis
import devices
import readings
import simulation
from alerts import AlertManager
from database import get_session, get_settings
from errors import ConflictError, InvalidTransitionError, NotFoundError
from models import AlertStatus, DeviceStatus, as_utc, utcnow
from parameters import Parameter
from rate_limiter import get_rate_limiter
from schemas import (
    AlertOut,
    AlertSummary,
    AlertTrendDay,
    AnomalyOut,
    AnomalyReportOut,
    BatchStatusResponse,
    BatchStatusUpdate,
    DeviceCreate,
    DeviceDeleteResponse,
    DeviceHealth,
    DeviceOut,
    DeviceStatusResponse,
    DeviceStatusUpdate,
    DeviceUpdate,
    ErrorDetail,
    ErrorResponse,
    HistoricalRequest,
    HistoricalResponse,
    IngestResponse,
    ParameterStatistics,
    ReadingCreate,
    ReadingRow,
    ReadingsResponse,
    ResolveAllResponse,
    SimulationStartResponse,
    SimulationStopResponse,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="Ocean Monitor API", version="0.1.0")


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(_request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = [
        ErrorDetail(loc=[str(p) for p in e["loc"]], msg=e["msg"], type=e["type"])
        for e in exc.errors()
    ]
    first = exc.errors()[0]["msg"] if exc.errors() else "Validation failed"
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=ErrorResponse(detail=first, errors=errors).model_dump(),
    )


@app.exception_handler(SQLAlchemyError)
async def sql_exception_handler(_request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.exception("Database error: %s", exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=ErrorResponse(detail="Internal server error").model_dump(),
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(_request: Request, exc: HTTPException) -> JSONResponse:
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(detail=detail).model_dump(),
    )


@app.exception_handler(NotFoundError)
async def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content=ErrorResponse(detail=f"{exc.kind} not found").model_dump(),
    )


@app.exception_handler(InvalidTransitionError)
@app.exception_handler(ConflictError)
async def conflict_handler(_request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_409_CONFLICT,
        content=ErrorResponse(detail=str(exc)).model_dump(),
    )


@app.get("/health")
def health():
    return {"status": "ok"}



def _query_range(start_time: datetime, end_time: datetime) -> tuple[datetime, datetime]:
    start_time, end_time = as_utc(start_time), as_utc(end_time)
    if start_time > end_time:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="start_time must be before end_time")
    max_days = get_settings().max_query_days
    if end_time - start_time > timedelta(days=max_days):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST, detail=f"Time range must not exceed {max_days} days"
        )
    return start_time, end_time


# Devices

@app.post("/devices", status_code=status.HTTP_201_CREATED, response_model=DeviceOut)
async def create_device(body: DeviceCreate, session: AsyncSession = Depends(get_session)):
    device = await devices.register_device(session, body, utcnow())
    return DeviceOut.from_model(device)


@app.get("/devices", response_model=list[DeviceOut])
async def list_devices(
    device_status: DeviceStatus | None = Query(None, alias="status"),
    session: AsyncSession = Depends(get_session),
):
    return [DeviceOut.from_model(d) for d in await devices.list_devices(session, device_status)]


@app.get("/devices/health", response_model=list[DeviceHealth])
async def all_device_health(session: AsyncSession = Depends(get_session)):
    return await devices.device_health(session, utcnow())


@app.get("/devices/{device_id}", response_model=DeviceOut)
async def get_device(device_id: str, session: AsyncSession = Depends(get_session)):
    return DeviceOut.from_model(await devices.get_device(session, device_id))


@app.patch("/devices/{device_id}", response_model=DeviceOut)
async def update_device(device_id: str, body: DeviceUpdate, session: AsyncSession = Depends(get_session)):
    return DeviceOut.from_model(await devices.update_device(session, device_id, body))


@app.delete("/devices/{device_id}", response_model=DeviceDeleteResponse)
async def delete_device(device_id: str, session: AsyncSession = Depends(get_session)):
    return await devices.delete_device(session, device_id)


@app.post("/devices/{device_id}/status", response_model=DeviceStatusResponse)
async def update_device_status(
    device_id: str, body: DeviceStatusUpdate, session: AsyncSession = Depends(get_session)
):
    device, resolved = await devices.update_device_status(
        session, device_id, body.status, utcnow(), battery_level=body.battery_level
    )
    return DeviceStatusResponse(device_id=device.id, status=device.status, resolved_alerts=resolved)


@app.get("/devices/{device_id}/health", response_model=DeviceHealth)
async def device_health(device_id: str, session: AsyncSession = Depends(get_session)):
    report = await devices.device_health(session, utcnow(), device_id=device_id)
    return report[0]


# Simulation

@app.post("/devices/{device_id}/simulation/start", response_model=SimulationStartResponse)
async def start_simulation(device_id: str, session: AsyncSession = Depends(get_session)):
    return await simulation.start_simulation(session, device_id)


@app.post("/devices/{device_id}/simulation/stop", response_model=SimulationStopResponse)
async def stop_simulation(device_id: str, session: AsyncSession = Depends(get_session)):
    return await simulation.stop_simulation(session, device_id)


@app.get("/simulation/devices", response_model=list[DeviceOut])
async def simulating_devices(session: AsyncSession = Depends(get_session)):
    return [DeviceOut.from_model(d) for d in await devices.list_simulating(session)]


@app.post(
    "/devices/{device_id}/readings/historical",
    status_code=status.HTTP_201_CREATED,
    response_model=HistoricalResponse,
)
async def generate_historical(
    device_id: str, body: HistoricalRequest, session: AsyncSession = Depends(get_session)
):
    count = await simulation.generate_historical(
        session, device_id, body.days, body.points_per_day, start=body.start_date
    )
    return HistoricalResponse(
        device_id=device_id, count=count, message=f"Generated {count} historical readings"
    )


# Readings

@app.post("/readings", status_code=status.HTTP_201_CREATED, response_model=IngestResponse)
async def post_reading(body: ReadingCreate, session: AsyncSession = Depends(get_session)):
    limiter = get_rate_limiter()
    if await limiter.is_rate_limited(body.device_id):
        raise HTTPException(status_code=status.HTTP_429_TOO_MANY_REQUESTS, detail="Rate limit exceeded")
    result = await readings.ingest_reading(session, body, utcnow())
    return IngestResponse(
        reading_id=result.reading.id,
        reading_status=result.reading.status,
        alerts_raised=len(result.alerts),
        resolved_alerts=result.resolved_alerts,
        recovered=result.recovered,
    )


@app.get("/devices/{device_id}/readings", response_model=ReadingsResponse)
async def get_device_readings(
    device_id: str,
    start_time: datetime = Query(..., description="Start of range (ISO 8601)"),
    end_time: datetime = Query(..., description="End of range (ISO 8601)"),
    session: AsyncSession = Depends(get_session),
):
    await devices.get_device(session, device_id)
    start_time, end_time = _query_range(start_time, end_time)
    rows = await readings.readings_in_range(session, device_id, start_time, end_time)
    return ReadingsResponse(device_id=device_id, data=[ReadingRow.model_validate(r) for r in rows])


@app.get("/readings/statistics", response_model=ParameterStatistics)
async def reading_statistics(
    parameter: Parameter = Query(...),
    start_time: datetime = Query(..., description="Start of range (ISO 8601)"),
    end_time: datetime = Query(..., description="End of range (ISO 8601)"),
    device_id: str | None = Query(None),
    session: AsyncSession = Depends(get_session),
):
    if device_id is not None:
        await devices.get_device(session, device_id)
    start_time, end_time = _query_range(start_time, end_time)
    return await analysis.parameter_statistics(session, parameter, start_time, end_time, device_id)


@app.post("/analysis/anomalies", response_model=AnomalyReportOut)
async def detect_anomalies(
    device_id: str | None = Query(None),
    lookback_hours: float = Query(24, gt=0, le=168),
    session: AsyncSession = Depends(get_session),
):
    if device_id is not None:
        await devices.get_device(session, device_id)
    report = await analysis.detect_anomalies(
        session, utcnow(), device_id=device_id, lookback=timedelta(hours=lookback_hours)
    )
    return AnomalyReportOut(
        message=f"Detected {len(report.anomalies)} anomalies",
        readings_checked=report.readings_checked,
        alerts_created=len(report.alerts),
        anomalies=[AnomalyOut.from_anomaly(a) for a in report.anomalies],
    )


# Alerts

@app.get("/alerts", response_model=list[AlertOut])
async def list_alerts(
    alert_status: AlertStatus | None = Query(None, alias="status"),
    limit: int = Query(50, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    return await AlertManager(session).list_alerts(status=alert_status, limit=limit)


@app.get("/alerts/summary", response_model=AlertSummary)
async def alert_summary(session: AsyncSession = Depends(get_session)):
    return await AlertManager(session).summary()


@app.get("/alerts/trends", response_model=list[AlertTrendDay])
async def alert_trends(
    days: int = Query(7, ge=1, le=90),
    session: AsyncSession = Depends(get_session),
):
    return await AlertManager(session).trends(days, utcnow())


@app.post("/alerts/batch-status", response_model=BatchStatusResponse)
async def batch_update_alerts(body: BatchStatusUpdate, session: AsyncSession = Depends(get_session)):
    results = await AlertManager(session).batch_update_status(body.ids, body.status)
    updated = sum(1 for r in results if r["success"])
    return BatchStatusResponse(message=f"Updated {updated} alert(s)", results=results)


@app.post("/alerts/{alert_id}/acknowledge", response_model=AlertOut)
async def acknowledge_alert(alert_id: int, session: AsyncSession = Depends(get_session)):
    return await AlertManager(session).acknowledge(alert_id)


@app.post("/alerts/{alert_id}/resolve", response_model=AlertOut)
async def resolve_alert(alert_id: int, session: AsyncSession = Depends(get_session)):
    return await AlertManager(session).resolve(alert_id)


@app.get("/devices/{device_id}/alerts", response_model=list[AlertOut])
async def device_alerts(
    device_id: str,
    limit: int = Query(20, ge=1, le=500),
    session: AsyncSession = Depends(get_session),
):
    await devices.get_device(session, device_id)
    return await AlertManager(session).list_alerts(device_id=device_id, limit=limit)


@app.post("/devices/{device_id}/alerts/resolve-all", response_model=ResolveAllResponse)
async def resolve_device_alerts(device_id: str, session: AsyncSession = Depends(get_session)):
    await devices.get_device(session, device_id)
    count, message = await AlertManager(session).resolve_all_for_device(device_id)
    return ResolveAllResponse(device_id=device_id, resolved_count=count, message=message)
