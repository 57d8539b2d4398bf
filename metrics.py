# metrics.py
from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Optional

from config_utils import (
    PhThresholds,
    RainfallThresholds,
    Thresholds,
    TurbidityThresholds,
)

RAIN_NONE = "none"
RAIN_LIGHT = "light"
RAIN_MODERATE = "moderate"
RAIN_HEAVY = "heavy"

GOOD = "Good"
MODERATE = "Moderate"
POOR = "Poor"
CRITICAL = "Critical"
INCOMPLETE = "Incomplete"


@dataclass(frozen=True)
class RawSample:
    """A validated device payload, before derivation."""

    device_id: str
    timestamp: dt.datetime
    raw_distance_cm: Optional[float] = None
    ph_value: Optional[float] = None
    turbidity_ntu: Optional[float] = None
    tds_ppm: Optional[float] = None
    temperature_c: Optional[float] = None
    rainfall_value_raw: Optional[int] = None


@dataclass(frozen=True)
class Reading:
    device_id: str
    timestamp: dt.datetime
    raw_distance_cm: Optional[float]
    water_level_cm: Optional[float]
    ph_value: Optional[float]
    turbidity_ntu: Optional[float]
    tds_ppm: Optional[float]
    temperature_c: Optional[float]
    rainfall_value_raw: Optional[int]


@dataclass(frozen=True)
class DerivedReading:
    reading: Reading
    rainfall_category: Optional[str]
    water_quality: str


def as_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        out = float(value)
    except (TypeError, ValueError):
        return None
    return out if math.isfinite(out) else None


def derive_water_level(sensor_height_cm: Any, raw_distance_cm: Any) -> Optional[float]:
    height = as_float(sensor_height_cm)
    distance = as_float(raw_distance_cm)
    if height is None or distance is None:
        return None
    return max(0.0, height - distance)


def classify_rainfall(raw: Any, thresholds: RainfallThresholds) -> Optional[str]:
    value = as_float(raw)
    if value is None:
        return None
    if value <= thresholds.no_rain_max:
        return RAIN_NONE
    if value <= thresholds.light_max:
        return RAIN_LIGHT
    if value <= thresholds.moderate_max:
        return RAIN_MODERATE
    return RAIN_HEAVY


def classify_ph(ph: float, thresholds: PhThresholds) -> str:
    if ph < thresholds.critical_low or ph > thresholds.critical_high:
        return CRITICAL
    if ph < thresholds.poor_low or ph > thresholds.poor_high:
        return POOR
    if thresholds.good_low <= ph <= thresholds.good_high:
        return GOOD
    return MODERATE


def classify_turbidity(turbidity: float, thresholds: TurbidityThresholds) -> str:
    if turbidity <= thresholds.good_max:
        return GOOD
    if turbidity <= thresholds.moderate_max:
        return MODERATE
    if turbidity <= thresholds.poor_max:
        return POOR
    return CRITICAL


def classify_water_quality(ph: Any, turbidity: Any, thresholds: Thresholds) -> str:
    ph_value = as_float(ph)
    turbidity_value = as_float(turbidity)
    if ph_value is None or turbidity_value is None:
        return INCOMPLETE

    categories = (
        classify_ph(ph_value, thresholds.ph),
        classify_turbidity(turbidity_value, thresholds.turbidity),
    )
    if CRITICAL in categories:
        return CRITICAL
    if POOR in categories:
        return POOR
    if categories == (GOOD, GOOD):
        return GOOD
    return MODERATE


def derive_reading(
    sample: RawSample, sensor_height_cm: Any, thresholds: Thresholds
) -> DerivedReading:
    reading = Reading(
        device_id=sample.device_id,
        timestamp=sample.timestamp,
        raw_distance_cm=sample.raw_distance_cm,
        water_level_cm=derive_water_level(sensor_height_cm, sample.raw_distance_cm),
        ph_value=sample.ph_value,
        turbidity_ntu=sample.turbidity_ntu,
        tds_ppm=sample.tds_ppm,
        temperature_c=sample.temperature_c,
        rainfall_value_raw=sample.rainfall_value_raw,
    )
    return DerivedReading(
        reading=reading,
        rainfall_category=classify_rainfall(
            sample.rainfall_value_raw, thresholds.rainfall
        ),
        water_quality=classify_water_quality(
            sample.ph_value, sample.turbidity_ntu, thresholds
        ),
    )
