import datetime as dt
import threading

import pytest

from alerts import AlertEngine
from broadcast import Broadcaster
from config_utils import Thresholds
from ingest import IngestionService
from liveness import DeviceLivenessMonitor
from push_client import SendResult
from store import Store

BASE_TS = dt.datetime(2026, 3, 1, 10, 0, 0)

DEVICES = [
    {
        "id": "RIVER-01",
        "location": "Upstream gauge",
        "sensor_height_cm": 300,
        "alert_threshold_percentage": 0.8,
    },
    {"id": "RIVER-02", "location": "City bridge", "sensor_height_cm": 250},
    {"id": "NO-HEIGHT", "location": "Unconfigured"},
]


class RecordingBroadcaster(Broadcaster):
    def __init__(self):
        self.events = []
        self._lock = threading.Lock()

    def publish(self, event, payload):
        with self._lock:
            self.events.append((event, payload))

    def named(self, event):
        return [p for e, p in self.events if e == event]


class RecordingDispatcher:
    """Stands in for NotificationDispatcher; runs background work inline."""

    def __init__(self):
        self.sent = []
        self._lock = threading.Lock()

    def submit(self, device_id, notification):
        with self._lock:
            self.sent.append((device_id, notification))

    def background(self, fn, *args):
        fn(*args)

    def for_device(self, device_id):
        return [n for d, n in self.sent if d == device_id]


class FakeProvider:
    def __init__(self, gone=(), failing=()):
        self.gone = set(gone)
        self.failing = set(failing)
        self.calls = []

    def build_message(self, notification):
        return {"title": notification.title, "body": notification.body}

    def send_multicast(self, tokens, message):
        self.calls.append((list(tokens), message))
        results = []
        for token in tokens:
            if token in self.gone:
                results.append(SendResult(token, False, "UNREGISTERED", "gone"))
            elif token in self.failing:
                results.append(SendResult(token, False, "UNAVAILABLE", "try later"))
            else:
                results.append(SendResult(token, True))
        return results


@pytest.fixture
def store(tmp_path):
    s = Store(db_url=f"sqlite:///{tmp_path / 'flood_test.db'}")
    s.sync_devices(DEVICES)
    return s


@pytest.fixture
def thresholds():
    return Thresholds()


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def liveness(store, broadcaster, dispatcher):
    return DeviceLivenessMonitor(
        store, broadcaster, dispatcher, offline_threshold_seconds=840
    )


@pytest.fixture
def engine(store, broadcaster, dispatcher, thresholds):
    return AlertEngine(store, broadcaster, dispatcher, thresholds)


@pytest.fixture
def pipeline(store, engine, liveness, broadcaster, thresholds):
    return IngestionService(store, engine, liveness, broadcaster, thresholds)


def reading(device_id="RIVER-01", seconds=0, distance=None, **extra):
    payload = {
        "deviceId": device_id,
        "deviceTimestamp": (BASE_TS + dt.timedelta(seconds=seconds)).isoformat() + "Z",
    }
    if distance is not None:
        payload["waterLevel_cm"] = distance
    payload.update(extra)
    return payload
