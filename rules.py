# rules.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from config_utils import FloodThresholds, Thresholds
from helpers import iso
from metrics import CRITICAL, INCOMPLETE, POOR, DerivedReading, as_float
from notify import Notification

FLOOD = "flood"
RAPID_RISE = "rapid_rise"
WATER_QUALITY = "critical_water_quality"
RULE_ORDER = (FLOOD, RAPID_RISE, WATER_QUALITY)

SEVERITY_CRITICAL = "critical"
SEVERITY_WARNING = "warning"


@dataclass(frozen=True)
class RuleOutcome:
    rule: str
    evaluated: bool
    met: bool = False
    severity: Optional[str] = None
    message: str = ""
    triggering_data: Dict[str, Any] = field(default_factory=dict)
    notification: Optional[Notification] = None


def skipped(rule: str) -> RuleOutcome:
    return RuleOutcome(rule=rule, evaluated=False)


def _dashboard_url(base: str, device_id: str, rule: str) -> str:
    return f"{base}/dashboard?deviceId={device_id}&alert=true&alertType={rule}"


# -----------------------------
# Flood threshold
# -----------------------------


@dataclass(frozen=True)
class CriticalLevel:
    level_cm: float
    source: str
    severity: str
    percentage: Optional[float] = None


def _device_percentage(device: Any, flood: FloodThresholds) -> Optional[CriticalLevel]:
    pct = as_float(device.alert_threshold_percentage)
    height = as_float(device.sensor_height_cm)
    if pct is None or height is None or height <= 0 or not 0 < pct <= 1:
        return None
    return CriticalLevel(
        height * pct, "device_percentage_threshold", SEVERITY_CRITICAL, pct
    )


def _device_absolute(device: Any, flood: FloodThresholds) -> Optional[CriticalLevel]:
    absolute = as_float(device.alert_threshold_absolute_cm)
    if absolute is None or absolute <= 0:
        return None
    return CriticalLevel(absolute, "device_absolute_threshold", SEVERITY_CRITICAL)


def _global_percentage(device: Any, flood: FloodThresholds) -> Optional[CriticalLevel]:
    height = as_float(device.sensor_height_cm)
    if height is None or height <= 0:
        return None
    return CriticalLevel(
        height * flood.global_percentage,
        "global_percentage_threshold",
        SEVERITY_WARNING,
        flood.global_percentage,
    )


def _global_absolute(device: Any, flood: FloodThresholds) -> Optional[CriticalLevel]:
    return CriticalLevel(
        flood.global_absolute_cm, "global_absolute_threshold", SEVERITY_WARNING
    )


# first resolver returning a level wins
FLOOD_LEVEL_RESOLVERS: Tuple[
    Callable[[Any, FloodThresholds], Optional[CriticalLevel]], ...
] = (_device_percentage, _device_absolute, _global_percentage, _global_absolute)


def resolve_critical_level(device: Any, flood: FloodThresholds) -> CriticalLevel:
    for resolver in FLOOD_LEVEL_RESOLVERS:
        level = resolver(device, flood)
        if level is not None:
            return level
    raise RuntimeError("flood level resolvers exhausted")


def evaluate_flood(
    device: Any, snapshot: Any, thresholds: Thresholds, dashboard_url: str = ""
) -> RuleOutcome:
    water_level = as_float(snapshot.water_level_cm)
    if water_level is None:
        return skipped(FLOOD)

    critical = resolve_critical_level(device, thresholds.flood)
    if water_level < critical.level_cm:
        return RuleOutcome(rule=FLOOD, evaluated=True, met=False)

    device_id = device.device_id
    location = device.location or "N/A"
    level = round(critical.level_cm, 2)
    if critical.percentage is not None:
        message = (
            f"FLOOD WARNING ({critical.source}) {device_id} ({location}): "
            f"water {water_level:g}cm >= {critical.percentage * 100:g}% "
            f"({level:.2f}cm) of sensor height "
            f"({as_float(device.sensor_height_cm):g}cm)."
        )
    else:
        message = (
            f"FLOOD WARNING ({critical.source}) {device_id} ({location}): "
            f"water {water_level:g}cm >= {level:g}cm."
        )

    triggering_data = {
        "waterLevel_cm": water_level,
        "threshold_type": critical.source,
        "threshold_value": level,
        "sensorHeight_cm": as_float(device.sensor_height_cm),
        "alert_threshold_percentage": critical.percentage,
    }
    notification = Notification(
        title=f"FLOOD WARNING: {device_id}",
        body=message[:200],
        data={
            "deviceId": device_id,
            "location": device.location,
            "alertType": FLOOD,
            "severity": critical.severity,
            "thresholdType": critical.source,
            "waterLevel_cm": water_level,
            "criticalLevel_cm": level,
            "timestamp": iso(snapshot.timestamp),
            "message": message,
        },
        url=_dashboard_url(dashboard_url, device_id, FLOOD),
    )
    return RuleOutcome(
        rule=FLOOD,
        evaluated=True,
        met=True,
        severity=critical.severity,
        message=message,
        triggering_data=triggering_data,
        notification=notification,
    )


# -----------------------------
# Rapid rise
# -----------------------------


def evaluate_rapid_rise(
    device: Any, snapshot: Any, thresholds: Thresholds, dashboard_url: str = ""
) -> RuleOutcome:
    current = as_float(snapshot.water_level_cm)
    previous = as_float(snapshot.previous_water_level_cm)
    if (
        current is None
        or previous is None
        or snapshot.timestamp is None
        or snapshot.previous_timestamp is None
    ):
        return skipped(RAPID_RISE)

    delta_seconds = (snapshot.timestamp - snapshot.previous_timestamp).total_seconds()
    if delta_seconds <= 0:
        return skipped(RAPID_RISE)

    delta_level = current - previous
    rate = delta_level / (delta_seconds / 60.0)
    if delta_level <= 0 or rate < thresholds.rapid_rise_cm_per_minute:
        return RuleOutcome(rule=RAPID_RISE, evaluated=True, met=False)

    device_id = device.device_id
    message = (
        f"RAPID WATER RISE on {device_id}: level rose {delta_level:.2f}cm "
        f"in {delta_seconds:.2f}s (rate {rate:.2f} cm/min)."
    )
    triggering_data = {
        "currentWaterLevel_cm": current,
        "previousWaterLevel_cm": previous,
        "deltaLevel_cm": round(delta_level, 2),
        "deltaTime_seconds": round(delta_seconds, 2),
        "rateOfChange_cm_per_minute": round(rate, 2),
    }
    notification = Notification(
        title=f"RAPID WATER RISE: {device_id}",
        body=message[:200],
        data={
            "deviceId": device_id,
            "location": device.location,
            "alertType": RAPID_RISE,
            "severity": SEVERITY_CRITICAL,
            "timestamp": iso(snapshot.timestamp),
            "message": message,
            **triggering_data,
        },
        url=_dashboard_url(dashboard_url, device_id, RAPID_RISE),
    )
    return RuleOutcome(
        rule=RAPID_RISE,
        evaluated=True,
        met=True,
        severity=SEVERITY_CRITICAL,
        message=message,
        triggering_data=triggering_data,
        notification=notification,
    )


# -----------------------------
# Water quality
# -----------------------------


def evaluate_water_quality(
    device: Any,
    snapshot: Any,
    category: str,
    dashboard_url: str = "",
) -> RuleOutcome:
    if category == INCOMPLETE:
        return skipped(WATER_QUALITY)
    if category not in (POOR, CRITICAL):
        return RuleOutcome(rule=WATER_QUALITY, evaluated=True, met=False)

    device_id = device.device_id
    severity = SEVERITY_CRITICAL if category == CRITICAL else SEVERITY_WARNING
    ph, turbidity = snapshot.ph_value, snapshot.turbidity_ntu
    message = (
        f"WATER QUALITY {category.upper()} on {device_id}: "
        f"pH={ph:g}, turbidity={turbidity:g} NTU."
    )
    triggering_data = {
        "ph_value": ph,
        "turbidity_ntu": turbidity,
        "qualityCategory": category,
    }
    notification = Notification(
        title=f"Water quality {category.upper()}: {device_id}",
        body=f"Water quality is {category} (pH: {ph:g}, turbidity: {turbidity:g} NTU).",
        data={
            "deviceId": device_id,
            "location": device.location,
            "alertType": WATER_QUALITY,
            "severity": severity,
            "timestamp": iso(snapshot.timestamp),
            "message": message,
            **triggering_data,
        },
        url=_dashboard_url(dashboard_url, device_id, WATER_QUALITY),
    )
    return RuleOutcome(
        rule=WATER_QUALITY,
        evaluated=True,
        met=True,
        severity=severity,
        message=message,
        triggering_data=triggering_data,
        notification=notification,
    )


def evaluate_all(
    device: Any,
    snapshot: Any,
    derived: DerivedReading,
    thresholds: Thresholds,
    dashboard_url: str = "",
) -> List[RuleOutcome]:
    """Outcomes in evaluation order: flood, rapid_rise, critical_water_quality."""
    return [
        evaluate_flood(device, snapshot, thresholds, dashboard_url),
        evaluate_rapid_rise(device, snapshot, thresholds, dashboard_url),
        evaluate_water_quality(device, snapshot, derived.water_quality, dashboard_url),
    ]
