from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class Phase(str, Enum):
    """Electrical phase of a rack feed."""

    single = "Single Phase"
    three = "3-Phase"


class ProblemType(str, Enum):
    temperature = "Temperature"
    humidity = "Humidity"
    power = "Power"


class AlertDirection(str, Enum):
    high = "high"
    low = "low"


class ProblemStatus(str, Enum):
    active = "active"
    resolved = "resolved"


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class RackRecord(_CamelModel):
    """A rack as reported by the inventory upstream, normalized."""

    name: str = Field(..., description="Unique rack name (upsert key).")
    site: str = Field("", description="Site name.")
    datacenter: str = Field("", description="Datacenter code.")
    under_maintenance: bool = Field(False, alias="underMaintenance")
    max_power_kw: float = Field(7.0, alias="maxPowerKw")
    max_units: int = Field(42, alias="maxUnits")
    free_units: int = Field(10, alias="freeUnits")
    phase: Phase = Field(Phase.single)

    # Live reading carried by some inventory payloads; used for power checks, never stored on the rack.
    total_current_a: Optional[float] = Field(default=None, alias="totalCurrentA", exclude=True)


class SensorRecord(_CamelModel):
    """A sensor reading as reported by the sensor upstream, normalized."""

    rack_name: str = Field(..., alias="rackName")
    temperature_c: Optional[float] = Field(default=None, alias="temperatureC")
    humidity_pct: Optional[float] = Field(default=None, alias="humidityPct")
    total_power_kw: Optional[float] = Field(default=None, alias="totalPowerKw")
    total_current_a: Optional[float] = Field(default=None, alias="totalCurrentA")
    total_voltage_v: Optional[float] = Field(default=None, alias="totalVoltageV")


class ProblemCreate(_CamelModel):
    """A threshold violation to be recorded."""

    rack_id: str = Field(..., alias="rackId")
    type: ProblemType
    measured_value: float = Field(..., alias="measuredValue")
    threshold_value: float = Field(..., alias="thresholdValue")
    alert_direction: AlertDirection = Field(..., alias="alertDirection")

    def key(self) -> tuple[str, str, str]:
        return (self.rack_id, self.type.value, self.alert_direction.value)


class Problem(ProblemCreate):
    """A persisted alert record."""

    id: str
    status: ProblemStatus = ProblemStatus.active
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class ThresholdSet(_CamelModel):
    """Min/max limits applied to sensor readings. Latest row by createdAt wins."""

    name: str = Field("global")
    min_temp: float = Field(..., alias="minTemp")
    max_temp: float = Field(..., alias="maxTemp")
    min_humidity: float = Field(..., alias="minHumidity")
    max_humidity: float = Field(..., alias="maxHumidity")
    max_current_single_phase_a: float = Field(..., alias="maxCurrentSinglePhaseA")
    max_current_three_phase_a: float = Field(..., alias="maxCurrentThreePhaseA")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")

    def max_current_for(self, phase: Phase) -> float:
        if phase == Phase.three:
            return self.max_current_three_phase_a
        return self.max_current_single_phase_a


class ThresholdUpdate(_CamelModel):
    """Request body for publishing a new threshold version."""

    min_temp: float = Field(..., alias="minTemp")
    max_temp: float = Field(..., alias="maxTemp")
    min_humidity: float = Field(..., alias="minHumidity", ge=0, le=100)
    max_humidity: float = Field(..., alias="maxHumidity", ge=0, le=100)
    max_current_single_phase_a: float = Field(..., alias="maxCurrentSinglePhaseA", gt=0)
    max_current_three_phase_a: float = Field(..., alias="maxCurrentThreePhaseA", gt=0)


DEFAULT_THRESHOLDS = ThresholdSet(
    name="global",
    min_temp=18.0,
    max_temp=32.0,
    min_humidity=40.0,
    max_humidity=70.0,
    max_current_single_phase_a=16.0,
    max_current_three_phase_a=48.0,
)


def _pick(record: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        v = record.get(k)
        if v is not None and v != "":
            return v
    return None


def _to_float(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def _to_float_or(v: Any, default: float) -> float:
    f = _to_float(v)
    return f if f is not None else default


def _to_int(v: Any, default: int) -> int:
    f = _to_float(v)
    return int(f) if f is not None else default


def _to_bool(v: Any) -> bool:
    if isinstance(v, str):
        return v.strip().lower() in ("1", "true", "yes")
    return bool(v)


def _phase_of(record: Mapping[str, Any]) -> Phase:
    explicit = _pick(record, "phase", "PHASE")
    if explicit is not None:
        text = str(explicit).lower()
        return Phase.three if ("3" in text or "three" in text) else Phase.single
    if record.get("L2_VOLTS") is not None or record.get("L3_VOLTS") is not None:
        return Phase.three
    return Phase.single


# PUBLIC_INTERFACE
def rack_name_of(record: Mapping[str, Any]) -> Optional[str]:
    """Rack name of an inventory record (legacy upper-case or camel/snake keys)."""
    name = _pick(record, "NAME", "name", "rackName", "rack_name")
    return str(name).strip() if name is not None and str(name).strip() else None


# PUBLIC_INTERFACE
def sensor_rack_name_of(record: Mapping[str, Any]) -> Optional[str]:
    """Rack name a sensor record refers to."""
    name = _pick(record, "RACK_NAME", "rackName", "rack_name", "NAME", "name")
    return str(name).strip() if name is not None and str(name).strip() else None


# PUBLIC_INTERFACE
def normalize_rack(record: Mapping[str, Any]) -> Optional[RackRecord]:
    """Map an upstream inventory record to RackRecord; None when it has no name."""
    name = rack_name_of(record)
    if not name:
        return None
    return RackRecord(
        name=name,
        site=str(_pick(record, "SITE", "site") or ""),
        datacenter=str(_pick(record, "DC", "datacenter", "dc") or ""),
        under_maintenance=_to_bool(_pick(record, "MAINTENANCE", "maintenance", "underMaintenance")),
        max_power_kw=_to_float_or(_pick(record, "MAXPOWER", "max_power", "maxPowerKw", "capacityKw"), 7.0),
        max_units=_to_int(_pick(record, "MAXU", "max_units", "maxUnits"), 42),
        free_units=_to_int(_pick(record, "FREEU", "free_units", "freeUnits"), 10),
        phase=_phase_of(record),
        total_current_a=_to_float(_pick(record, "TOTAL_AMPS", "totalAmps", "total_current")),
    )


# PUBLIC_INTERFACE
def normalize_sensor(record: Mapping[str, Any]) -> Optional[SensorRecord]:
    """Map an upstream sensor record to SensorRecord; None when it names no rack."""
    rack_name = sensor_rack_name_of(record)
    if not rack_name:
        return None
    return SensorRecord(
        rack_name=rack_name,
        temperature_c=_to_float(_pick(record, "TEMPERATURE", "temperature", "temperatureC")),
        humidity_pct=_to_float(_pick(record, "HUMIDITY", "humidity", "humidityPct")),
        total_power_kw=_to_float(_pick(record, "TOTAL_KW", "totalKw", "totalPowerKw")),
        total_current_a=_to_float(_pick(record, "TOTAL_AMPS", "totalAmps", "totalCurrentA")),
        total_voltage_v=_to_float(_pick(record, "TOTAL_VOLTS", "totalVolts", "totalVoltageV")),
    )


def thresholds_from_doc(doc: Dict[str, Any]) -> Optional[ThresholdSet]:
    """Build a ThresholdSet from a stored document; None when required limits are missing."""
    try:
        return ThresholdSet.model_validate(doc)
    except ValidationError:
        return None
