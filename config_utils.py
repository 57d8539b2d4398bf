# config_utils.py
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv

_ENV_PATTERN = re.compile(r"^\$\{([A-Z0-9_]+)(?::-(.*))?\}$")
load_dotenv()


def expand_env_vars(obj: Any) -> Any:
    """
    Recursively replace values like "${VAR_NAME}" with os.environ["VAR_NAME"]
    if present.
    "${VAR_NAME:-fallback}" uses the fallback when the variable is unset.
    Leaves value unchanged if env var is missing and no fallback is given.
    """
    if isinstance(obj, dict):
        return {k: expand_env_vars(v) for k, v in obj.items()}
    if isinstance(obj, list):
        return [expand_env_vars(v) for v in obj]
    if isinstance(obj, str):
        m = _ENV_PATTERN.match(obj.strip())
        if m:
            name, fallback = m.group(1), m.group(2)
            if name in os.environ:
                return os.environ[name]
            return fallback if fallback is not None else obj
        return obj
    return obj


def load_config(path: str = "config.yml") -> Dict[str, Any]:
    with open(path, "r") as f:
        cfg = yaml.safe_load(f) or {}
    return expand_env_vars(cfg)


def _section(cfg: Dict[str, Any], *keys: str) -> Dict[str, Any]:
    node: Any = cfg
    for key in keys:
        node = (node or {}).get(key) if isinstance(node, dict) else None
    return node if isinstance(node, dict) else {}


@dataclass(frozen=True)
class FloodThresholds:
    global_percentage: float = 0.8
    global_absolute_cm: float = 200.0


@dataclass(frozen=True)
class RainfallThresholds:
    no_rain_max: float = 50
    light_max: float = 1000
    moderate_max: float = 2500


@dataclass(frozen=True)
class PhThresholds:
    critical_low: float = 5.5
    poor_low: float = 6.5
    good_low: float = 6.5
    good_high: float = 8.5
    poor_high: float = 9.5
    critical_high: float = 9.5


@dataclass(frozen=True)
class TurbidityThresholds:
    good_max: float = 25
    moderate_max: float = 100
    poor_max: float = 300


@dataclass(frozen=True)
class Thresholds:
    flood: FloodThresholds = field(default_factory=FloodThresholds)
    rapid_rise_cm_per_minute: float = 5.0
    rainfall: RainfallThresholds = field(default_factory=RainfallThresholds)
    ph: PhThresholds = field(default_factory=PhThresholds)
    turbidity: TurbidityThresholds = field(default_factory=TurbidityThresholds)


@dataclass(frozen=True)
class Settings:
    db_url: str = "sqlite:///flood_monitor.db"
    log_level: str = "INFO"
    thresholds: Thresholds = field(default_factory=Thresholds)
    offline_threshold_seconds: int = 840
    check_interval_seconds: int = 60
    renotify_cooldown_seconds: int = 0
    require_timestamp: bool = True
    auto_register_devices: bool = True
    notify_max_workers: int = 16
    dashboard_url: str = "http://localhost:3000"
    push: Dict[str, Any] = field(default_factory=dict)
    channels: Dict[str, Any] = field(default_factory=dict)
    devices: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_config(cls, cfg: Optional[Dict[str, Any]]) -> "Settings":
        cfg = cfg or {}
        app = _section(cfg, "app")
        thr = _section(cfg, "thresholds")
        liveness = _section(cfg, "liveness")
        alerts = _section(cfg, "alerts")
        ingest = _section(cfg, "ingest")
        notify = _section(cfg, "notify")

        thresholds = Thresholds(
            flood=FloodThresholds(
                **{k: float(v) for k, v in _section(thr, "flood").items()}
            ),
            rapid_rise_cm_per_minute=float(thr.get("rapid_rise_cm_per_minute", 5.0)),
            rainfall=RainfallThresholds(
                **{k: float(v) for k, v in _section(thr, "rainfall").items()}
            ),
            ph=PhThresholds(**{k: float(v) for k, v in _section(thr, "ph").items()}),
            turbidity=TurbidityThresholds(
                **{k: float(v) for k, v in _section(thr, "turbidity").items()}
            ),
        )

        return cls(
            db_url=str(app.get("db_url", cls.db_url)),
            log_level=str(app.get("log_level", cls.log_level)).upper(),
            thresholds=thresholds,
            offline_threshold_seconds=int(
                liveness.get("offline_threshold_seconds", cls.offline_threshold_seconds)
            ),
            check_interval_seconds=int(
                liveness.get("check_interval_seconds", cls.check_interval_seconds)
            ),
            renotify_cooldown_seconds=int(
                alerts.get("renotify_cooldown_seconds", cls.renotify_cooldown_seconds)
            ),
            require_timestamp=bool(
                ingest.get("require_timestamp", cls.require_timestamp)
            ),
            auto_register_devices=bool(
                ingest.get("auto_register_devices", cls.auto_register_devices)
            ),
            notify_max_workers=int(notify.get("max_workers", cls.notify_max_workers)),
            dashboard_url=str(notify.get("dashboard_url", cls.dashboard_url)).rstrip(
                "/"
            ),
            push=_section(cfg, "push"),
            channels=_section(notify, "channels"),
            devices=list(cfg.get("devices") or []),
        )
