from dataclasses import dataclass
from enum import Enum


class Parameter(str, Enum):
    """Physical quantities a device can report. Values double as Reading column names."""

    TEMPERATURE = "temperature"
    SALINITY = "salinity"
    DISSOLVED_OXYGEN = "dissolved_oxygen"
    PH = "ph"
    FLOW_RATE = "flow_rate"
    TURBIDITY = "turbidity"


# Alert.parameter_type used for liveness transitions instead of a Parameter.
DEVICE_STATUS = "device_status"


@dataclass(frozen=True)
class ParameterSpec:
    unit: str
    simulation_range: tuple[float, float]
    noise: float
    alert_range: tuple[float, float] | None = None


# alert_range is what ingestion accepts before raising an alert; simulation_range
# is narrower so synthetic data stays visually plausible.
PARAMETERS: dict[Parameter, ParameterSpec] = {
    Parameter.TEMPERATURE: ParameterSpec(
        unit="°C", simulation_range=(6.0, 29.0), noise=0.4, alert_range=(5.0, 30.0)
    ),
    Parameter.SALINITY: ParameterSpec(
        unit="PSU", simulation_range=(31.0, 38.0), noise=0.3, alert_range=(30.0, 40.0)
    ),
    Parameter.DISSOLVED_OXYGEN: ParameterSpec(
        unit="mg/L", simulation_range=(5.0, 9.5), noise=0.3, alert_range=(4.0, 10.0)
    ),
    Parameter.PH: ParameterSpec(
        unit="pH", simulation_range=(7.8, 8.3), noise=0.03, alert_range=(7.0, 8.5)
    ),
    Parameter.FLOW_RATE: ParameterSpec(unit="m/s", simulation_range=(0.0, 2.0), noise=0.1),
    Parameter.TURBIDITY: ParameterSpec(unit="NTU", simulation_range=(0.5, 10.0), noise=0.75),
}


def clamp(value: float, bounds: tuple[float, float]) -> float:
    low, high = bounds
    return max(low, min(high, value))
