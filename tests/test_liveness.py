import datetime as dt
import time

from conftest import reading
from helpers import utcnow
from liveness import STATUS_EVENT, is_offline


def test_offline_threshold_boundary():
    seen = dt.datetime(2026, 3, 1, 10, 0, 0)
    assert not is_offline(seen, seen + dt.timedelta(seconds=840), 840)
    assert is_offline(seen, seen + dt.timedelta(seconds=841), 840)
    assert is_offline(None, seen, 840)


def test_devices_that_never_reported_go_offline_once(liveness, store, broadcaster):
    changes = liveness.sweep()

    assert sorted(c.device_id for c in changes) == ["NO-HEIGHT", "RIVER-01", "RIVER-02"]
    assert all(c.is_offline for c in changes)
    assert len(broadcaster.named(STATUS_EVENT)) == 3
    assert store.get_device_offline_flag("RIVER-01") is True

    assert liveness.sweep() == []
    assert len(broadcaster.named(STATUS_EVENT)) == 3


def test_recent_reading_keeps_device_online(pipeline, liveness, store):
    pipeline.submit(reading(distance=100))

    changed = {c.device_id for c in liveness.sweep()}

    assert "RIVER-01" not in changed
    assert store.get_device_offline_flag("RIVER-01") is False


def test_silent_device_flips_offline_then_back_online(
    pipeline, liveness, store, broadcaster, dispatcher
):
    pipeline.submit(reading(distance=100))
    later = utcnow() + dt.timedelta(seconds=900)

    changes = liveness.sweep(now=later)

    river = [c for c in changes if c.device_id == "RIVER-01"]
    assert len(river) == 1 and river[0].is_offline
    assert store.get_device_offline_flag("RIVER-01") is True
    offline_push = dispatcher.for_device("RIVER-01")[-1]
    assert offline_push.title == "Device offline: RIVER-01"
    assert offline_push.data["isOffline"] is True

    assert liveness.sweep(now=later) == []

    pipeline.submit(reading(seconds=900, distance=100))

    assert store.get_device_offline_flag("RIVER-01") is False
    events = [e for e in broadcaster.named(STATUS_EVENT) if e["deviceId"] == "RIVER-01"]
    assert [e["isOffline"] for e in events] == [True, False]
    online_push = dispatcher.for_device("RIVER-01")[-1]
    assert online_push.title == "Device online: RIVER-01"
    assert "back online after sending new data" in online_push.body


def test_reactive_path_is_noop_for_online_device(liveness, broadcaster, dispatcher):
    assert liveness.mark_online_if_needed("RIVER-01") is None
    assert broadcaster.named(STATUS_EVENT) == []
    assert dispatcher.sent == []


def test_sweep_continues_after_a_device_fails(liveness, store, monkeypatch):
    real_set = store.set_device_offline_flag

    def flaky(device_id, flag):
        if device_id == "RIVER-01":
            raise RuntimeError("db hiccup")
        return real_set(device_id, flag)

    monkeypatch.setattr(store, "set_device_offline_flag", flaky)

    changes = liveness.sweep()

    assert sorted(c.device_id for c in changes) == ["NO-HEIGHT", "RIVER-02"]


def test_status_notification_links_to_device(liveness):
    liveness.dashboard_url = "https://dash.example"
    liveness.sweep()

    n = liveness.dispatcher.for_device("RIVER-02")[0]
    assert n.url == "https://dash.example/admin/devices/edit/RIVER-02?status=offline"
    assert n.data["type"] == "device_status"


def test_background_loop_starts_and_stops(liveness, broadcaster):
    liveness.check_interval_seconds = 0.01
    liveness.start()
    deadline = time.monotonic() + 5
    while len(broadcaster.named(STATUS_EVENT)) < 3 and time.monotonic() < deadline:
        time.sleep(0.01)
    liveness.stop()

    assert liveness._thread is None
    assert len(broadcaster.named(STATUS_EVENT)) == 3
