from pathlib import Path

from config_utils import Settings, Thresholds, expand_env_vars, load_config

CONFIG = Path(__file__).resolve().parent.parent / "config.yml"


def test_expand_env_vars(monkeypatch):
    monkeypatch.setenv("FLOOD_TEST_URL", "sqlite:///x.db")
    monkeypatch.delenv("FLOOD_TEST_MISSING", raising=False)

    out = expand_env_vars(
        {
            "a": "${FLOOD_TEST_URL}",
            "b": ["${FLOOD_TEST_MISSING:-fallback}", "${FLOOD_TEST_MISSING}"],
            "c": 5,
            "d": "plain ${FLOOD_TEST_URL}",
        }
    )

    assert out == {
        "a": "sqlite:///x.db",
        "b": ["fallback", "${FLOOD_TEST_MISSING}"],
        "c": 5,
        "d": "plain ${FLOOD_TEST_URL}",
    }


def test_settings_defaults():
    s = Settings.from_config({})

    assert s.thresholds == Thresholds()
    assert s.offline_threshold_seconds == 840
    assert s.check_interval_seconds == 60
    assert s.renotify_cooldown_seconds == 0
    assert s.require_timestamp is True
    assert s.devices == []


def test_settings_overrides():
    s = Settings.from_config(
        {
            "app": {"log_level": "debug"},
            "thresholds": {
                "flood": {"global_absolute_cm": 150},
                "rapid_rise_cm_per_minute": 3,
                "turbidity": {"good_max": 10},
            },
            "liveness": {"offline_threshold_seconds": 300},
            "ingest": {"require_timestamp": False},
            "notify": {"dashboard_url": "https://dash.example/"},
        }
    )

    assert s.log_level == "DEBUG"
    assert s.thresholds.flood.global_absolute_cm == 150.0
    assert s.thresholds.flood.global_percentage == 0.8
    assert s.thresholds.rapid_rise_cm_per_minute == 3.0
    assert s.thresholds.turbidity.good_max == 10.0
    assert s.thresholds.turbidity.poor_max == 300
    assert s.offline_threshold_seconds == 300
    assert s.require_timestamp is False
    assert s.dashboard_url == "https://dash.example"


def test_shipped_config_loads(monkeypatch):
    monkeypatch.delenv("FLOOD_DB_URL", raising=False)

    s = Settings.from_config(load_config(str(CONFIG)))

    assert s.db_url == "sqlite:///flood_monitor.db"
    assert s.push["provider"] == "console"
    assert [d["id"] for d in s.devices] == ["RIVER-01", "RIVER-02"]
    assert s.thresholds == Thresholds()
