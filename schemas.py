from datetime import datetime
from pydantic import BaseModel, Field, field_validator, model_validator
import re

from models import AlertSeverity, AlertStatus, DeviceStatus, ReadingStatus
from parameters import Parameter


def _alphanumeric(v: str) -> str:
    if not v or not re.match(r"^[a-zA-Z0-9\-_]+$", v):
        raise ValueError("device_id must be alphanumeric (letters, digits, hyphens, underscores)")
    return v


class Location(BaseModel):
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    depth: float | None = Field(None, ge=0, description="Depth in m")
    description: str | None = Field(None, max_length=255)


class DeviceConfig(BaseModel):
    sample_rate: int = Field(15, gt=0, description="Minutes between samples")
    upload_interval: int = Field(60, gt=0, description="Minutes between uploads")
    parameters: list[Parameter] = Field(default_factory=lambda: list(Parameter))


class DeviceCreate(BaseModel):
    device_id: str | None = Field(None, min_length=1, max_length=64)
    name: str = Field(..., min_length=1, max_length=128)
    type: str = Field(..., min_length=1, max_length=64)
    location: Location
    config: DeviceConfig = Field(default_factory=DeviceConfig)
    battery_level: float | None = Field(None, ge=0, le=100)

    @field_validator("device_id")
    @classmethod
    def device_id_alphanumeric(cls, v: str | None) -> str | None:
        return v if v is None else _alphanumeric(v)


class DeviceUpdate(BaseModel):
    name: str | None = Field(None, min_length=1, max_length=128)
    type: str | None = Field(None, min_length=1, max_length=64)
    location: Location | None = None
    config: DeviceConfig | None = None


class DeviceStatusUpdate(BaseModel):
    status: DeviceStatus
    battery_level: float | None = Field(None, ge=0, le=100)


class DeviceOut(BaseModel):
    id: str
    name: str
    type: str
    location: Location
    status: DeviceStatus
    last_active: datetime
    battery_level: float | None
    is_simulating: bool
    config: DeviceConfig

    @classmethod
    def from_model(cls, device) -> "DeviceOut":
        return cls(
            id=device.id,
            name=device.name,
            type=device.type,
            location=Location(
                latitude=device.latitude,
                longitude=device.longitude,
                depth=device.depth,
                description=device.location_description,
            ),
            status=device.status,
            last_active=device.last_active,
            battery_level=device.battery_level,
            is_simulating=device.is_simulating,
            config=DeviceConfig(
                sample_rate=device.sample_rate,
                upload_interval=device.upload_interval,
                parameters=device.parameters,
            ),
        )


class DeviceStatusResponse(BaseModel):
    device_id: str
    status: DeviceStatus
    resolved_alerts: int


class DeviceDeleteResponse(BaseModel):
    device_id: str
    deleted_readings: int
    deleted_alerts: int
    message: str


class DeviceHealth(BaseModel):
    id: str
    name: str
    type: str
    status: DeviceStatus
    health_score: int
    last_active: datetime
    last_active_age_seconds: float
    activity: str
    battery_level: float | None
    readings_last_week: int
    open_alerts: int
    latest_reading_at: datetime | None


class ReadingCreate(BaseModel):
    model_config = {"allow_inf_nan": False}

    device_id: str = Field(..., min_length=1, max_length=64)
    timestamp: datetime | None = None
    location: Location
    temperature: float | None = Field(None, description="°C")
    salinity: float | None = Field(None, description="PSU")
    dissolved_oxygen: float | None = Field(None, description="mg/L")
    ph: float | None = None
    flow_rate: float | None = Field(None, description="m/s")
    turbidity: float | None = Field(None, description="NTU")

    @field_validator("device_id")
    @classmethod
    def device_id_alphanumeric(cls, v: str) -> str:
        return _alphanumeric(v)

    @model_validator(mode="after")
    def at_least_one_measurement(self) -> "ReadingCreate":
        if not self.measurements():
            names = ", ".join(p.value for p in Parameter)
            raise ValueError(f"At least one measurement is required ({names})")
        return self

    def measurements(self) -> dict[Parameter, float]:
        values = {p: getattr(self, p.value) for p in Parameter}
        return {p: v for p, v in values.items() if v is not None}


class IngestResponse(BaseModel):
    status: str = "created"
    reading_id: int
    reading_status: ReadingStatus
    alerts_raised: int
    resolved_alerts: int
    recovered: bool


class ReadingRow(BaseModel):
    id: int
    timestamp: datetime
    latitude: float
    longitude: float
    depth: float | None
    temperature: float | None
    salinity: float | None
    dissolved_oxygen: float | None
    ph: float | None
    flow_rate: float | None
    turbidity: float | None
    status: ReadingStatus

    model_config = {"from_attributes": True}


class ReadingsResponse(BaseModel):
    device_id: str
    data: list[ReadingRow]


class HistoricalRequest(BaseModel):
    days: int = Field(..., ge=1, le=90)
    points_per_day: int = Field(..., ge=1, le=1440)
    start_date: datetime | None = None

    @model_validator(mode="after")
    def bounded_total(self) -> "HistoricalRequest":
        if self.days * self.points_per_day > 10_000:
            raise ValueError("days * points_per_day must not exceed 10000")
        return self


class HistoricalResponse(BaseModel):
    device_id: str
    count: int
    message: str


class SimulationStartResponse(BaseModel):
    device_id: str
    is_simulating: bool
    already_simulating: bool
    tick_scheduled: bool
    resolved_alerts: int


class SimulationStopResponse(BaseModel):
    device_id: str
    is_simulating: bool
    was_simulating: bool
    cancelled_ticks: int


class AlertOut(BaseModel):
    id: int
    device_id: str
    timestamp: datetime
    parameter_type: str
    value: float
    threshold: float
    severity: AlertSeverity
    status: AlertStatus
    message: str

    model_config = {"from_attributes": True}


class AlertSummary(BaseModel):
    total: int
    by_status: dict[str, int]
    by_severity: dict[str, int]
    by_parameter: dict[str, int]
    recent: list[AlertOut]


class ResolveAllResponse(BaseModel):
    device_id: str
    resolved_count: int
    message: str


class BatchStatusUpdate(BaseModel):
    ids: list[int] = Field(..., min_length=1, max_length=500)
    status: AlertStatus


class BatchItemResult(BaseModel):
    id: int
    success: bool
    error: str | None = None


class BatchStatusResponse(BaseModel):
    message: str
    results: list[BatchItemResult]


class ErrorDetail(BaseModel):
    loc: list[str]
    msg: str
    type: str


class ErrorResponse(BaseModel):
    detail: str
    errors: list[ErrorDetail] | None = None


class AlertTrendDay(BaseModel):
    date: str
    day_start: datetime
    total: int
    low: int
    medium: int
    high: int
    info: int


class ParameterStatistics(BaseModel):
    parameter: Parameter
    device_id: str | None
    count: int
    average: float | None
    minimum: float | None
    maximum: float | None
    standard_deviation: float | None
    trend: str


class AnomalyOut(BaseModel):
    device_id: str
    parameter: Parameter
    timestamp: datetime
    value: float
    mean: float
    std_dev: float
    deviation: float
    severity: AlertSeverity

    @classmethod
    def from_anomaly(cls, anomaly) -> "AnomalyOut":
        return cls(
            device_id=anomaly.device_id,
            parameter=anomaly.parameter,
            timestamp=anomaly.timestamp,
            value=anomaly.value,
            mean=anomaly.mean,
            std_dev=anomaly.std_dev,
            deviation=anomaly.deviation,
            severity=anomaly.severity,
        )


class AnomalyReportOut(BaseModel):
    message: str
    readings_checked: int
    alerts_created: int
    anomalies: list[AnomalyOut]
