# notify.py
from __future__ import annotations

import logging
import tempfile
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import requests

logger = logging.getLogger(__name__)

FCM_SEND_PREFIX = "https://fcm.googleapis.com/fcm/send/"


@dataclass(frozen=True)
class Notification:
    title: str
    body: str
    data: Dict[str, Any] = field(default_factory=dict)
    url: str = ""


@dataclass(frozen=True)
class Endpoint:
    """
    One subscriber endpoint, whatever the client shape.

    Web clients register a push-service URL, mobile clients an FCM token; both
    are keyed by the canonical endpoint URL. `token` is the FCM registration
    token, or None when the endpoint is not deliverable through FCM.

    Only FCM endpoints are accepted as new subscriptions.
    """

    kind: str
    key: str
    token: Optional[str]

    @classmethod
    def from_token(cls, token: str) -> "Endpoint":
        return cls(kind="fcm", key=f"{FCM_SEND_PREFIX}{token}", token=token)

    @classmethod
    def from_url(cls, url: str) -> "Endpoint":
        if url.startswith(FCM_SEND_PREFIX):
            token = url[len(FCM_SEND_PREFIX) :].strip("/")
            return cls(kind="fcm", key=url, token=token or None)
        return cls(kind="webpush", key=url, token=None)

    @classmethod
    def from_subscription(cls, raw: Dict[str, Any]) -> "Endpoint":
        """Browser PushSubscription {endpoint, keys} or mobile {fcmToken}."""
        endpoint = raw.get("endpoint")
        token = raw.get("fcmToken")
        if isinstance(endpoint, str) and endpoint:
            parsed = cls.from_url(endpoint)
        elif isinstance(token, str) and token:
            parsed = cls.from_token(token)
        else:
            raise ValueError("subscription needs an 'endpoint' URL or an 'fcmToken'")
        if parsed.token is None:
            raise ValueError(
                f"push endpoint {parsed.key} is not an FCM endpoint; "
                "subscribe through Firebase Messaging instead"
            )
        return parsed


@dataclass
class DispatchReport:
    device_id: str
    recipients: int = 0
    delivered: int = 0
    failed: int = 0
    pruned: List[int] = field(default_factory=list)
    skipped: int = 0


def notify_console(title: str, message: str) -> None:
    logger.warning("%s | %s", title, message)


def notify_slack(webhook_url: str, title: str, message: str, timeout: int = 10) -> None:
    if not webhook_url:
        return
    r = requests.post(
        webhook_url, json={"text": f"*{title}*\n{message}"}, timeout=timeout
    )
    r.raise_for_status()


class NotificationDispatcher:
    """
    Fans one notification out to every subscriber that prefers the device.

    dispatch() never raises; submit() runs it on the dispatcher pool and
    returns immediately.
    """

    def __init__(self, store, provider, max_workers: int = 16):
        self.store = store
        self.provider = provider
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="notify"
        )

    def submit(self, device_id: str, notification: Notification) -> Optional[Future]:
        return self.background(self.dispatch, device_id, notification)

    def background(self, fn: Callable[..., Any], *args: Any) -> Optional[Future]:
        try:
            future = self._pool.submit(fn, *args)
        except RuntimeError:
            logger.warning("Dispatcher is shut down; dropping %s", fn)
            return None
        future.add_done_callback(_log_background_failure)
        return future

    def dispatch(self, device_id: str, notification: Notification) -> DispatchReport:
        report = DispatchReport(device_id=device_id)
        try:
            self._dispatch(device_id, notification, report)
        except Exception:
            logger.exception("Push dispatch for device %s failed", device_id)
        return report

    def _dispatch(
        self, device_id: str, notification: Notification, report: DispatchReport
    ) -> None:
        subscribers = self.store.list_subscribers_for_device(device_id)
        if not subscribers:
            logger.info("No push subscriptions prefer device %s", device_id)
            return

        subs_by_token: Dict[str, List[int]] = {}
        for sub in subscribers:
            endpoint = Endpoint.from_url(sub.endpoint)
            if endpoint.token is None:
                report.skipped += 1
                logger.warning(
                    "Subscription %s is not an FCM endpoint; skipped", sub.id
                )
                continue
            subs_by_token.setdefault(endpoint.token, []).append(sub.id)

        tokens = list(subs_by_token)
        report.recipients = len(tokens)
        if not tokens:
            logger.warning("No deliverable push tokens for device %s", device_id)
            return

        message = self.provider.build_message(notification)
        results = self.provider.send_multicast(tokens, message)

        for result in results:
            if result.success:
                report.delivered += 1
                continue
            report.failed += 1
            if result.endpoint_gone:
                self._prune(subs_by_token.get(result.token, []), result, report)
            else:
                logger.warning(
                    "Push to %s... for device %s failed: %s %s",
                    result.token[:12],
                    device_id,
                    result.error_code,
                    result.error_message,
                )

        logger.info(
            "Push for device %s: %d delivered, %d failed, %d pruned",
            device_id,
            report.delivered,
            report.failed,
            len(report.pruned),
        )

    def _prune(self, sub_ids: List[int], result, report: DispatchReport) -> None:
        for sub_id in sub_ids:
            try:
                if self.store.delete_subscription(sub_id):
                    report.pruned.append(sub_id)
                    logger.info(
                        "Deleted dead push subscription %s (%s)",
                        sub_id,
                        result.error_code,
                    )
            except Exception:
                logger.exception("Could not delete push subscription %s", sub_id)

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)


def _log_background_failure(future: Future) -> None:
    if future.cancelled():
        return
    exc = future.exception()
    if exc is not None:
        logger.error("Background notification task failed", exc_info=exc)


class OperatorChannels:
    """Slack and SES e-mail summaries for operators when a new alert is created."""

    def __init__(self, channels_cfg: Dict[str, Any], store=None, mailer=None):
        self.store = store
        self.slack_cfg = channels_cfg.get("slack", {}) or {}
        self.email_cfg = channels_cfg.get("email", {}) or {}
        self.mailer = mailer
        if self.mailer is None and self.email_cfg.get("enabled", False):
            from ses_mailer import SesMailer

            ses = self.email_cfg.get("ses", {}) or {}
            self.mailer = SesMailer(
                region=ses["region"],
                access_key=ses["access_key"],
                secret_key=ses["secret_key"],
                from_address=ses["from_address"],
            )

    @property
    def enabled(self) -> bool:
        return bool(
            self.slack_cfg.get("enabled", False) or self.email_cfg.get("enabled", False)
        )

    def alert_created(
        self, alert, label: str, critical_level_cm: Optional[float] = None
    ) -> None:
        title = f"[{alert.severity.upper()}] {alert.alert_type} on {alert.device_id}"
        notify_console(title, alert.message)

        if self.slack_cfg.get("enabled", False):
            try:
                notify_slack(
                    self.slack_cfg.get("webhook_url", ""), title, alert.message
                )
            except requests.RequestException:
                logger.exception("Slack notification for alert %s failed", alert.id)

        if self.email_cfg.get("enabled", False) and self.mailer is not None:
            with tempfile.TemporaryDirectory() as td:
                chart = self._chart(alert, label, critical_level_cm, Path(td))
                try:
                    self.mailer.send_alert(
                        self.email_cfg.get("to_addrs", []),
                        title,
                        alert.message,
                        charts=[chart] if chart else None,
                    )
                except Exception:
                    logger.exception(
                        "E-mail notification for alert %s failed", alert.id
                    )

    def _chart(
        self,
        alert,
        label: str,
        critical_level_cm: Optional[float],
        out_dir: Path,
    ) -> Optional[Path]:
        if self.store is None or alert.alert_type not in ("flood", "rapid_rise"):
            return None
        from plotter import plot_water_level

        rows = self.store.recent_water_levels(alert.device_id)
        out = plot_water_level(
            label,
            rows,
            str(out_dir / f"{alert.device_id}_{alert.id}.png"),
            critical_level_cm=critical_level_cm,
        )
        return Path(out) if out else None
