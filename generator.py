"""
Synthetic reading generator.

Produces one plausible reading for a device from a latitude-dependent base,
a seasonal cycle, a diurnal or semidiurnal (tidal) cycle, an optional
continuity pull towards the previous reading, and bounded uniform noise.
The generator never touches the database and never raises alerts; callers
decide what to do with the reading.
"""
import math
import random
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

from models import ReadingStatus, as_utc
from parameters import PARAMETERS, Parameter, clamp

DAYS_PER_YEAR = 365.25
DIURNAL_PERIOD_HOURS = 24.0
TIDAL_PERIOD_HOURS = 12.0

MIN_HISTORY_FOR_CONTINUITY = 5
CONTINUITY_DAMPING = 0.75
LOCATION_JITTER_DEGREES = 0.005
DEFAULT_DEPTH_M = 5.0


@dataclass(frozen=True)
class SiteContext:
    latitude: float
    day_of_year: int
    solar_hour: float

    @property
    def abs_latitude(self) -> float:
        return abs(self.latitude)

    @property
    def hemisphere(self) -> int:
        return -1 if self.latitude < 0 else 1

    @property
    def seasonal_scale(self) -> float:
        # 0 at the equator, 1 from 60 degrees polewards
        return min(self.abs_latitude, 60.0) / 60.0


@dataclass
class GeneratedReading:
    timestamp: datetime
    latitude: float
    longitude: float
    depth: float | None
    values: dict[Parameter, float] = field(default_factory=dict)
    status: str = ReadingStatus.NORMAL.value


def site_context(latitude: float, longitude: float, timestamp: datetime) -> SiteContext:
    ts = as_utc(timestamp)
    utc_hour = ts.hour + ts.minute / 60 + ts.second / 3600
    solar_hour = (utc_hour + longitude / 15.0) % 24.0
    return SiteContext(latitude=latitude, day_of_year=ts.timetuple().tm_yday, solar_hour=solar_hour)


def seasonal(ctx: SiteContext, amplitude: float) -> float:
    # Peaks in early July in the north; southern sites are phase-inverted.
    phase = 2 * math.pi * ctx.day_of_year / DAYS_PER_YEAR - math.pi / 2
    return ctx.hemisphere * amplitude * ctx.seasonal_scale * math.sin(phase)


def cycle(ctx: SiteContext, amplitude: float, period_hours: float, peak_hour: float = 0.0) -> float:
    phase = 2 * math.pi * (ctx.solar_hour - peak_hour) / period_hours + math.pi / 2
    return amplitude * math.sin(phase)


def _temperature(ctx: SiteContext, model: dict[Parameter, float]) -> float:
    base = 28.0 - 0.3 * ctx.abs_latitude
    return base + seasonal(ctx, 6.0) + cycle(ctx, 0.8, DIURNAL_PERIOD_HOURS, peak_hour=15.0)


def _salinity(ctx: SiteContext, model: dict[Parameter, float]) -> float:
    if ctx.abs_latitude < 10:
        base = 34.6
    elif ctx.abs_latitude < 35:
        base = 35.8
    elif ctx.abs_latitude < 55:
        base = 34.8
    else:
        base = 33.8
    return base + seasonal(ctx, 0.4) + cycle(ctx, 0.15, TIDAL_PERIOD_HOURS)


def _flow_rate(ctx: SiteContext, model: dict[Parameter, float]) -> float:
    base = 0.3 + 0.004 * ctx.abs_latitude
    return base + seasonal(ctx, 0.05) + cycle(ctx, 0.25, TIDAL_PERIOD_HOURS)


def _dissolved_oxygen(ctx: SiteContext, model: dict[Parameter, float]) -> float:
    # Colder water holds more oxygen; photosynthesis lifts it in the afternoon.
    base = 8.0 - 0.12 * (model[Parameter.TEMPERATURE] - 15.0)
    return base + cycle(ctx, 0.3, DIURNAL_PERIOD_HOURS, peak_hour=14.0)


def _ph(ctx: SiteContext, model: dict[Parameter, float]) -> float:
    base = 8.1 - 0.002 * (model[Parameter.TEMPERATURE] - 15.0)
    return base + seasonal(ctx, 0.02) + cycle(ctx, 0.03, DIURNAL_PERIOD_HOURS, peak_hour=14.0)


def _turbidity(ctx: SiteContext, model: dict[Parameter, float]) -> float:
    base = 2.0 + 0.02 * ctx.abs_latitude + 1.5 * model[Parameter.FLOW_RATE]
    return base + seasonal(ctx, 0.5) + cycle(ctx, 0.4, TIDAL_PERIOD_HOURS, peak_hour=1.5)


# Ordered: later models may read earlier ones from the partially built dict.
MODELS: dict[Parameter, Callable[[SiteContext, dict[Parameter, float]], float]] = {
    Parameter.TEMPERATURE: _temperature,
    Parameter.SALINITY: _salinity,
    Parameter.FLOW_RATE: _flow_rate,
    Parameter.DISSOLVED_OXYGEN: _dissolved_oxygen,
    Parameter.PH: _ph,
    Parameter.TURBIDITY: _turbidity,
}


def model_values(ctx: SiteContext) -> dict[Parameter, float]:
    """Noise-free projection of every parameter for a site and time."""
    values: dict[Parameter, float] = {}
    for parameter, model in MODELS.items():
        values[parameter] = model(ctx, values)
    return values


def configured_parameters(names: Sequence[str] | None) -> list[Parameter]:
    if not names:
        return list(Parameter)
    return [Parameter(name) for name in names]


class ReadingGenerator:
    """Builds synthetic readings; pass a seeded ``random.Random`` for repeatable output."""

    __slots__ = ("_rng",)

    def __init__(self, rng: random.Random | None = None):
        self._rng = rng or random.Random()

    def generate(self, device, timestamp: datetime, history: Sequence | None = None) -> GeneratedReading:
        """Generate one reading for ``device`` at ``timestamp``.

        ``history`` holds the device's most recent readings ordered oldest to
        newest. Fewer than MIN_HISTORY_FOR_CONTINUITY points disables the
        continuity correction.
        """
        ctx = site_context(device.latitude, device.longitude, timestamp)
        projected = model_values(ctx)
        previous = history[-1] if history and len(history) >= MIN_HISTORY_FOR_CONTINUITY else None

        values: dict[Parameter, float] = {}
        for parameter in configured_parameters(device.parameters):
            spec = PARAMETERS[parameter]
            value = projected[parameter]
            if previous is not None:
                last = getattr(previous, parameter.value, None)
                if last is not None:
                    value += (last - value) * CONTINUITY_DAMPING
            value += self._rng.uniform(-spec.noise, spec.noise)
            values[parameter] = round(clamp(value, spec.simulation_range), 3)

        if device.depth is not None:
            depth = device.depth
        else:
            depth = round(DEFAULT_DEPTH_M + self._rng.uniform(-1.0, 1.0), 2)

        return GeneratedReading(
            timestamp=as_utc(timestamp),
            latitude=device.latitude + self._rng.uniform(-LOCATION_JITTER_DEGREES, LOCATION_JITTER_DEGREES),
            longitude=device.longitude + self._rng.uniform(-LOCATION_JITTER_DEGREES, LOCATION_JITTER_DEGREES),
            depth=depth,
            values=values,
        )
