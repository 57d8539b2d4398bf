# ingest.py
from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from alerts import AlertEngine, AlertInfo, Transition
from broadcast import Broadcaster, safe_publish
from config_utils import Thresholds
from helpers import iso, to_naive_utc, utcnow
from liveness import DeviceLivenessMonitor
from metrics import INCOMPLETE, DerivedReading, RawSample, derive_reading
from store import Snapshot, Store

logger = logging.getLogger(__name__)

# payload key -> accepted aliases
_FIELDS = {
    "device_id": ("deviceId", "device_id"),
    "timestamp": ("deviceTimestamp", "timestamp"),
    "raw_distance_cm": ("waterLevel_cm", "raw_distance_cm"),
    "ph_value": ("ph_value",),
    "turbidity_ntu": ("turbidity_ntu",),
    "tds_ppm": ("tds_ppm",),
    "temperature_c": ("temperature_c",),
    "rainfall_value_raw": ("rainfall_value_raw",),
}
_NUMERIC = ("raw_distance_cm", "ph_value", "turbidity_ntu", "tds_ppm", "temperature_c")


class IngestValidationError(ValueError):
    """The payload was rejected before anything was written."""


class UnknownDeviceError(LookupError):
    pass


def _pick(raw: Dict[str, Any], name: str) -> Any:
    for key in _FIELDS[name]:
        if key in raw:
            return raw[key]
    return None


def parse_number(name: str, value: Any) -> Optional[float]:
    if value is None or (isinstance(value, str) and not value.strip()):
        return None
    if isinstance(value, bool):
        raise IngestValidationError(f"{name} must be a number.")
    try:
        out = float(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError):
        raise IngestValidationError(f"{name} must be a number, got {value!r}.")
    if not math.isfinite(out):
        raise IngestValidationError(f"{name} must be a finite number.")
    return out


def parse_timestamp(value: Any) -> dt.datetime:
    """ISO-8601 string, or epoch seconds / milliseconds. Returns naive UTC."""
    if isinstance(value, bool):
        raise IngestValidationError("Invalid deviceTimestamp format.")
    if isinstance(value, (int, float)):
        seconds = float(value)
        if not math.isfinite(seconds):
            raise IngestValidationError("Invalid deviceTimestamp format.")
        if abs(seconds) > 1e11:
            seconds /= 1000.0
        try:
            ts = dt.datetime.fromtimestamp(seconds, tz=dt.timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise IngestValidationError("Invalid deviceTimestamp format.")
        return to_naive_utc(ts)
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return to_naive_utc(dt.datetime.fromisoformat(text))
        except ValueError:
            raise IngestValidationError("Invalid deviceTimestamp format.")
    raise IngestValidationError("Invalid deviceTimestamp format.")


def parse_payload(raw: Any, require_timestamp: bool = True) -> RawSample:
    if not isinstance(raw, dict):
        raise IngestValidationError("Payload must be a JSON object.")

    device_id = _pick(raw, "device_id")
    if not isinstance(device_id, str) or not device_id.strip():
        raise IngestValidationError("deviceId is required and must be a string.")

    ts_value = _pick(raw, "timestamp")
    if ts_value is None or ts_value == "":
        if require_timestamp:
            raise IngestValidationError("deviceTimestamp is required.")
        timestamp = utcnow()
    else:
        timestamp = parse_timestamp(ts_value)

    numbers = {name: parse_number(name, _pick(raw, name)) for name in _NUMERIC}
    rainfall = parse_number("rainfall_value_raw", _pick(raw, "rainfall_value_raw"))

    return RawSample(
        device_id=device_id.strip(),
        timestamp=timestamp,
        rainfall_value_raw=int(rainfall) if rainfall is not None else None,
        **numbers,
    )


@dataclass
class IngestResult:
    latest: Snapshot
    alert_info: AlertInfo
    derived: DerivedReading
    transitions: List[Transition] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "latest": {
                **self.latest.to_dict(),
                "rainfall_category": self.derived.rainfall_category,
                "water_quality_category": self.derived.water_quality,
            },
            "alertInfo": self.alert_info.to_dict(),
        }


class IngestionService:
    def __init__(
        self,
        store: Store,
        engine: AlertEngine,
        liveness: DeviceLivenessMonitor,
        broadcaster: Broadcaster,
        thresholds: Thresholds,
        require_timestamp: bool = True,
        auto_register_devices: bool = True,
    ):
        self.store = store
        self.engine = engine
        self.liveness = liveness
        self.broadcaster = broadcaster
        self.thresholds = thresholds
        self.require_timestamp = require_timestamp
        self.auto_register_devices = auto_register_devices

    def submit(self, raw: Dict[str, Any]) -> IngestResult:
        sample = parse_payload(raw, require_timestamp=self.require_timestamp)

        device = self.store.get_device_config(sample.device_id)
        if device is None:
            if not self.auto_register_devices:
                raise UnknownDeviceError(f"Unknown device {sample.device_id}.")
            logger.warning(
                "Device %s not registered; auto-registering", sample.device_id
            )
            device = self.store.ensure_device(sample.device_id)

        derived = derive_reading(sample, device.sensor_height_cm, self.thresholds)
        if derived.reading.water_level_cm is None:
            logger.warning(
                "No water level for %s (raw distance %s, sensor height %s)",
                device.device_id,
                sample.raw_distance_cm,
                device.sensor_height_cm,
            )

        self.store.append_reading_history(derived.reading)
        latest = self.store.upsert_latest_snapshot(derived.reading)
        safe_publish(self.broadcaster, "new_sensor_data", latest.to_dict())

        self.liveness.mark_online_if_needed(
            device.device_id, device.location, latest.last_updated_at
        )
        self._publish_categories(latest, derived)

        processed = self.engine.process(device, latest, derived)
        return IngestResult(
            latest=latest,
            alert_info=processed.alert_info,
            derived=derived,
            transitions=processed.transitions,
        )

    def _publish_categories(self, latest: Snapshot, derived: DerivedReading) -> None:
        if derived.rainfall_category is not None:
            safe_publish(
                self.broadcaster,
                "rainfall_update",
                {
                    "deviceId": latest.device_id,
                    "rainfall_raw_value": latest.rainfall_value_raw,
                    "rainfall_category": derived.rainfall_category,
                    "timestamp": iso(latest.timestamp),
                },
            )
        if derived.water_quality != INCOMPLETE:
            safe_publish(
                self.broadcaster,
                "water_quality_update",
                {
                    "deviceId": latest.device_id,
                    "ph_value": latest.ph_value,
                    "turbidity_ntu": latest.turbidity_ntu,
                    "qualityCategory": derived.water_quality,
                    "timestamp": iso(latest.timestamp),
                },
            )
