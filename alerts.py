# alerts.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from broadcast import Broadcaster, safe_publish
from config_utils import Thresholds
from helpers import KeyedLocks, iso
from metrics import DerivedReading
from rules import (
    FLOOD,
    RAPID_RISE,
    SEVERITY_CRITICAL,
    WATER_QUALITY,
    RuleOutcome,
    evaluate_all,
)
from store import AlertRecord, DuplicateActiveAlert

logger = logging.getLogger(__name__)

CREATED = "created"
ONGOING = "ongoing"
RESOLVED = "resolved"
UNCHANGED = "unchanged"

ALERT_EVENTS = {
    FLOOD: "flood_alert",
    RAPID_RISE: "rapid_water_rise_alert",
    WATER_QUALITY: "critical_water_quality_alert",
}
RESOLVED_MESSAGES = {
    FLOOD: "Flood warning for {device_id} has ended.",
    RAPID_RISE: "Rapid water rise warning for {device_id} has ended.",
    WATER_QUALITY: "Water quality warning for {device_id} has ended.",
}


@dataclass
class AlertInfo:
    triggered: bool = False
    message: str = ""
    payload: Optional[Dict[str, Any]] = None
    rule: Optional[str] = None
    severity: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "triggered": self.triggered,
            "message": self.message,
            "payload": self.payload,
        }


@dataclass(frozen=True)
class Transition:
    rule: str
    kind: str
    alert: Optional[AlertRecord] = None
    outcome: Optional[RuleOutcome] = None


@dataclass
class ProcessResult:
    alert_info: AlertInfo = field(default_factory=AlertInfo)
    transitions: List[Transition] = field(default_factory=list)


def notification_payload(outcome: RuleOutcome) -> Dict[str, Any]:
    n = outcome.notification
    return {**n.data, "title": n.title, "body": n.body, "url": n.url}


class AlertEngine:
    """
    Runs the three rules on each snapshot and keeps one lifecycle per
    (device, rule): created on the first met evaluation, kept (and re-notified)
    while met, resolved on the first evaluation that is not met.
    """

    def __init__(
        self,
        store,
        broadcaster: Broadcaster,
        dispatcher,
        thresholds: Thresholds,
        dashboard_url: str = "",
        renotify_cooldown_seconds: int = 0,
        operators=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.broadcaster = broadcaster
        self.dispatcher = dispatcher
        self.thresholds = thresholds
        self.dashboard_url = dashboard_url
        self.renotify_cooldown_seconds = renotify_cooldown_seconds
        self.operators = operators
        self._clock = clock
        self._locks = KeyedLocks()
        self._last_push: Dict[Tuple[str, str], float] = {}
        self._push_guard = threading.Lock()

    def process(self, device, snapshot, derived: DerivedReading) -> ProcessResult:
        result = ProcessResult()
        outcomes = evaluate_all(
            device, snapshot, derived, self.thresholds, self.dashboard_url
        )
        for outcome in outcomes:
            if not outcome.evaluated:
                continue
            result.transitions.append(self.apply(device, snapshot, outcome))
            if outcome.met and (
                not result.alert_info.triggered
                or outcome.severity == SEVERITY_CRITICAL
            ):
                result.alert_info = AlertInfo(
                    triggered=True,
                    message=outcome.message,
                    payload=notification_payload(outcome),
                    rule=outcome.rule,
                    severity=outcome.severity,
                )
        return result

    def apply(self, device, snapshot, outcome: RuleOutcome) -> Transition:
        with self._locks.hold((device.device_id, outcome.rule)):
            transition = self._transition(device.device_id, snapshot.timestamp, outcome)
        self._announce(device, snapshot, transition)
        return transition

    def _transition(self, device_id: str, ts, outcome: RuleOutcome) -> Transition:
        active = self.store.find_active_alert(device_id, outcome.rule)

        if outcome.met:
            if active is not None:
                return Transition(outcome.rule, ONGOING, active, outcome)
            try:
                created = self.store.create_alert(
                    device_id=device_id,
                    alert_type=outcome.rule,
                    severity=outcome.severity,
                    message=outcome.message,
                    triggering_data=outcome.triggering_data,
                    sensor_data_timestamp=ts,
                    triggered_at=ts,
                )
            except DuplicateActiveAlert:
                # another process won the insert
                return Transition(
                    outcome.rule,
                    ONGOING,
                    self.store.find_active_alert(device_id, outcome.rule),
                    outcome,
                )
            logger.warning(
                "Created %s alert %s for %s", outcome.rule, created.id, device_id
            )
            return Transition(outcome.rule, CREATED, created, outcome)

        if active is not None and self.store.resolve_alert(active.id, ts):
            logger.info(
                "Resolved %s alert %s for %s", outcome.rule, active.id, device_id
            )
            return Transition(outcome.rule, RESOLVED, active, outcome)
        return Transition(outcome.rule, UNCHANGED, active, outcome)

    def _announce(self, device, snapshot, transition: Transition) -> None:
        key = (device.device_id, transition.rule)
        outcome = transition.outcome

        if transition.kind == CREATED:
            payload = notification_payload(outcome)
            payload["alertId"] = transition.alert.id
            safe_publish(self.broadcaster, ALERT_EVENTS[transition.rule], payload)
            self._push(key, device.device_id, outcome, force=True)
            if self.operators is not None and self.operators.enabled:
                self.dispatcher.background(
                    self.operators.alert_created,
                    transition.alert,
                    f"{device.device_id} ({device.location or 'N/A'})",
                    outcome.triggering_data.get("threshold_value"),
                )

        elif transition.kind == ONGOING:
            logger.info(
                "%s alert for %s still active; re-notifying",
                transition.rule,
                device.device_id,
            )
            self._push(key, device.device_id, outcome, force=False)

        elif transition.kind == RESOLVED:
            with self._push_guard:
                self._last_push.pop(key, None)
            safe_publish(
                self.broadcaster,
                "alert_resolved",
                {
                    "deviceId": device.device_id,
                    "alertType": transition.rule,
                    "alertId": transition.alert.id,
                    "resolved_at": iso(snapshot.timestamp),
                    "message": RESOLVED_MESSAGES[transition.rule].format(
                        device_id=device.device_id
                    ),
                },
            )

    def _push(self, key, device_id: str, outcome: RuleOutcome, force: bool) -> None:
        now = self._clock()
        with self._push_guard:
            last = self._last_push.get(key)
            if (
                not force
                and self.renotify_cooldown_seconds > 0
                and last is not None
                and now - last < self.renotify_cooldown_seconds
            ):
                logger.debug("Re-notify for %s/%s suppressed by cooldown", *key)
                return
            self._last_push[key] = now
        self.dispatcher.submit(device_id, outcome.notification)
