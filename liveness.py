# liveness.py
from __future__ import annotations

import datetime as dt
import logging
import threading
from dataclasses import dataclass
from typing import List, Optional

from broadcast import Broadcaster, safe_publish
from helpers import iso, utcnow
from notify import Notification

logger = logging.getLogger(__name__)

STATUS_EVENT = "device_status_update"


@dataclass(frozen=True)
class StatusChange:
    device_id: str
    is_offline: bool
    location: Optional[str]
    last_seen_at: Optional[dt.datetime]
    reactive: bool = False


def is_offline(
    last_seen_at: Optional[dt.datetime], now: dt.datetime, threshold_seconds: int
) -> bool:
    if last_seen_at is None:
        return True
    return (now - last_seen_at).total_seconds() > threshold_seconds


class DeviceLivenessMonitor:
    """
    Keeps each device's offline flag in step with the time since its last reading.

    sweep() is the timer-driven path over every device; mark_online_if_needed()
    is called after each ingestion so a returning device flips back at once.
    """

    def __init__(
        self,
        store,
        broadcaster: Broadcaster,
        dispatcher,
        offline_threshold_seconds: int = 840,
        check_interval_seconds: int = 60,
        dashboard_url: str = "",
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.offline_threshold_seconds = offline_threshold_seconds
        self.check_interval_seconds = check_interval_seconds
        self.dashboard_url = dashboard_url
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ---------------- timer path ----------------

    def sweep(self, now: Optional[dt.datetime] = None) -> List[StatusChange]:
        now = now or utcnow()
        devices = self.store.list_devices_with_last_seen()
        logger.debug("Liveness sweep over %d device(s)", len(devices))

        changes: List[StatusChange] = []
        for device in devices:
            try:
                offline = is_offline(
                    device.last_seen_at, now, self.offline_threshold_seconds
                )
                if offline == device.is_offline:
                    continue
                if not self.store.set_device_offline_flag(device.device_id, offline):
                    # the reactive path already wrote the same flag
                    continue
                change = StatusChange(
                    device_id=device.device_id,
                    is_offline=offline,
                    location=device.location,
                    last_seen_at=device.last_seen_at,
                )
                self._announce(change)
                changes.append(change)
            except Exception:
                logger.exception(
                    "Liveness check for device %s failed", device.device_id
                )

        if changes:
            logger.info("Liveness sweep: %d status change(s)", len(changes))
        return changes

    # ---------------- reactive path ----------------

    def mark_online_if_needed(
        self,
        device_id: str,
        location: Optional[str] = None,
        last_seen_at: Optional[dt.datetime] = None,
    ) -> Optional[StatusChange]:
        if not self.store.get_device_offline_flag(device_id):
            return None
        if not self.store.set_device_offline_flag(device_id, False):
            return None
        change = StatusChange(
            device_id=device_id,
            is_offline=False,
            location=location,
            last_seen_at=last_seen_at or utcnow(),
            reactive=True,
        )
        logger.info("Device %s reported data while offline; marked online", device_id)
        self._announce(change)
        return change

    def _announce(self, change: StatusChange) -> None:
        safe_publish(
            self.broadcaster,
            STATUS_EVENT,
            {
                "deviceId": change.device_id,
                "isOffline": change.is_offline,
                "location": change.location,
                "lastSeenAt": iso(change.last_seen_at),
            },
        )
        self.dispatcher.submit(change.device_id, self.status_notification(change))

    def status_notification(self, change: StatusChange) -> Notification:
        label = f"{change.device_id} ({change.location or 'N/A'})"
        seen = iso(change.last_seen_at) or "unknown"
        if change.is_offline:
            title = f"Device offline: {change.device_id}"
            body = (
                f"Device {label} was last seen at {seen} "
                "and is now considered offline."
            )
            status = "offline"
        elif change.reactive:
            title = f"Device online: {change.device_id}"
            body = f"Device {label} is back online after sending new data."
            status = "online"
        else:
            title = f"Device online: {change.device_id}"
            body = f"Device {label} is back online (last seen {seen})."
            status = "online"
        return Notification(
            title=title,
            body=body,
            data={
                "deviceId": change.device_id,
                "location": change.location,
                "type": "device_status",
                "isOffline": change.is_offline,
                "lastSeenAt": iso(change.last_seen_at),
                "message": body,
            },
            url=(
                f"{self.dashboard_url}/admin/devices/edit/{change.device_id}"
                f"?status={status}"
            ),
        )

    # ---------------- background loop ----------------

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run, name="liveness-monitor", daemon=True
        )
        self._thread.start()
        logger.info(
            "Liveness monitor started (every %ss, offline after %ss)",
            self.check_interval_seconds,
            self.offline_threshold_seconds,
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None

    def run_forever(self) -> None:
        self._run()

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.sweep()
            except Exception:
                logger.exception("Liveness sweep failed")
            self._stop.wait(self.check_interval_seconds)
