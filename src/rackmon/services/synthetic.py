"""Placeholder records used when every real data source has failed and the caller allowed it."""

from __future__ import annotations

import random
from typing import List, Optional

from src.rackmon.schemas.telemetry import DEFAULT_THRESHOLDS

_RACKS = [
    # name, site, dc, phase, max units
    ("BA00173", "Barcelona", "IT1", "Single Phase", 47),
    ("BA02276", "Barcelona", "IT1", "Single Phase", 42),
    ("MA01102", "Madrid", "DC2", "3-Phase", 42),
    ("MA01103", "Madrid", "DC2", "3-Phase", 48),
]


def _rack_records(rng: random.Random) -> List[dict]:
    out = []
    for idx, (name, site, dc, phase, max_u) in enumerate(_RACKS, start=1):
        volts = round(rng.uniform(226.0, 232.0), 2)
        amps = round(rng.uniform(2.0, 12.0), 2)
        out.append(
            {
                "id": str(idx),
                "NAME": name,
                "SITE": site,
                "DC": dc,
                "MAINTENANCE": "0",
                "MAXPOWER": "7",
                "MAXU": str(max_u),
                "FREEU": str(rng.randint(0, max_u)),
                "TOTAL_VOLTS": f"{volts:.2f}",
                "TOTAL_AMPS": f"{amps:.2f}",
                "TOTAL_KW": f"{volts * amps / 1000:.6f}",
                "phase": phase,
            }
        )
    return out


def _sensor_records(rng: random.Random) -> List[dict]:
    out = []
    for idx, (name, *_rest) in enumerate(_RACKS, start=1):
        volts = round(rng.uniform(226.0, 232.0), 2)
        amps = round(rng.uniform(2.0, 12.0), 2)
        out.append(
            {
                "id": str(idx),
                "RACK_NAME": name,
                "TEMPERATURE": f"{rng.uniform(20.0, 28.0):.1f}",
                "HUMIDITY": f"{rng.uniform(42.0, 60.0):.1f}",
                "TOTAL_VOLTS": f"{volts:.2f}",
                "TOTAL_AMPS": f"{amps:.2f}",
                "TOTAL_KW": f"{volts * amps / 1000:.6f}",
            }
        )
    return out


# PUBLIC_INTERFACE
def synthetic_records(source: str, seed: Optional[int] = None) -> List[dict]:
    """Plausibly shaped records for `source` ("rack", "sensor" or "threshold" substring); [] otherwise."""
    rng = random.Random(seed)
    lowered = (source or "").lower()
    if "rack" in lowered:
        return _rack_records(rng)
    if "sensor" in lowered:
        return _sensor_records(rng)
    if "threshold" in lowered:
        return [DEFAULT_THRESHOLDS.model_dump(mode="json", by_alias=True)]
    return []
