# push_client.py
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import google.auth.exceptions
import requests
from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

logger = logging.getLogger(__name__)

# provider error codes meaning the registration token will never work again
GONE_ERROR_CODES = frozenset({"UNREGISTERED", "NOT_FOUND", "INVALID_REGISTRATION"})

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"


@dataclass(frozen=True)
class SendResult:
    token: str
    success: bool
    error_code: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def endpoint_gone(self) -> bool:
        return not self.success and self.error_code in GONE_ERROR_CODES


def _stringify_data(data: Dict[str, Any]) -> Dict[str, str]:
    # FCM data values must be strings
    return {str(k): "" if v is None else str(v) for k, v in data.items()}


class ConsoleProvider:
    """Logs every push instead of delivering it. Used when no provider is configured."""

    def build_message(self, notification) -> Dict[str, Any]:
        return {
            "title": notification.title,
            "body": notification.body,
            "data": _stringify_data({**notification.data, "url": notification.url}),
        }

    def send_multicast(
        self, tokens: List[str], message: Dict[str, Any]
    ) -> List[SendResult]:
        for token in tokens:
            logger.info(
                "[push:console] %s -> %s: %s",
                token[:12],
                message["title"],
                message["body"],
            )
        return [SendResult(token=t, success=True) for t in tokens]


class FCMClient:
    """
    Firebase Cloud Messaging HTTP v1 client.

    One POST per registration token, all tokens of a multicast sent in parallel.
    Requests go through a google-auth AuthorizedSession, which attaches the
    OAuth bearer token and refreshes it when it expires or is rejected.
    """

    def __init__(
        self,
        project_id: str,
        session: requests.Session,
        base_url: str = "https://fcm.googleapis.com/v1",
        timeout: int = 10,
        max_workers: int = 32,
        android_channel_id: str = "FloodWarningChannel",
    ):
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.session = session
        self.timeout = timeout
        self.max_workers = max_workers
        self.android_channel_id = android_channel_id

    @classmethod
    def from_credentials(cls, credentials, project_id: Optional[str] = None, **kw):
        project_id = project_id or getattr(credentials, "project_id", None)
        if not project_id:
            raise ValueError("FCM project id is not configured")
        return cls(project_id=project_id, session=AuthorizedSession(credentials), **kw)

    @classmethod
    def from_service_account_file(
        cls, path: str, project_id: Optional[str] = None, **kw
    ) -> "FCMClient":
        credentials = service_account.Credentials.from_service_account_file(
            path, scopes=[FCM_SCOPE]
        )
        return cls.from_credentials(credentials, project_id=project_id, **kw)

    @property
    def send_url(self) -> str:
        return f"{self.base_url}/projects/{self.project_id}/messages:send"

    def build_message(self, notification) -> Dict[str, Any]:
        message: Dict[str, Any] = {
            "notification": {"title": notification.title, "body": notification.body},
            "data": _stringify_data({**notification.data, "url": notification.url}),
            "android": {
                "priority": "high",
                "notification": {"channel_id": self.android_channel_id},
            },
        }
        # FCM only accepts https links for web clients
        if notification.url.startswith("https://"):
            message["webpush"] = {"fcm_options": {"link": notification.url}}
        return message

    def send_multicast(
        self, tokens: List[str], message: Dict[str, Any]
    ) -> List[SendResult]:
        if not tokens:
            return []
        workers = max(1, min(len(tokens), self.max_workers))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="fcm") as pool:
            return list(pool.map(lambda t: self._send_one(t, message), tokens))

    def _send_one(self, token: str, message: Dict[str, Any]) -> SendResult:
        body = {"message": {**message, "token": token}}
        headers = {"Content-Type": "application/json; charset=UTF-8"}
        try:
            r = self.session.post(
                self.send_url, json=body, headers=headers, timeout=self.timeout
            )
        except google.auth.exceptions.GoogleAuthError as exc:
            return SendResult(
                token=token, success=False, error_code="AUTH", error_message=str(exc)
            )
        except requests.RequestException as exc:
            return SendResult(
                token=token,
                success=False,
                error_code="TRANSPORT",
                error_message=str(exc),
            )

        if r.ok:
            return SendResult(token=token, success=True)

        code, text = self._classify_error(r)
        return SendResult(
            token=token, success=False, error_code=code, error_message=text
        )

    @staticmethod
    def _classify_error(r: requests.Response) -> tuple:
        try:
            error = r.json().get("error", {}) or {}
        except ValueError:
            error = {}
        status = str(error.get("status") or "")
        text = str(error.get("message") or r.text[:200])

        detail_codes = [
            str(d.get("errorCode"))
            for d in error.get("details", []) or []
            if isinstance(d, dict) and d.get("errorCode")
        ]
        if "UNREGISTERED" in detail_codes:
            return "UNREGISTERED", text
        if r.status_code == 404 or status == "NOT_FOUND":
            return "NOT_FOUND", text
        if r.status_code == 400 and "registration token" in text.lower():
            return "INVALID_REGISTRATION", text
        if detail_codes:
            return detail_codes[0], text
        return status or f"HTTP_{r.status_code}", text


def make_provider(push_cfg: Dict[str, Any], max_workers: int = 32):
    provider = str(push_cfg.get("provider", "console")).lower()
    if provider == "fcm":
        fcm = push_cfg.get("fcm", {}) or {}
        return FCMClient.from_service_account_file(
            fcm["service_account_file"],
            project_id=fcm.get("project_id") or None,
            timeout=int(fcm.get("timeout", 10)),
            max_workers=max_workers,
        )
    if provider == "console":
        return ConsoleProvider()
    raise ValueError(
        f"Unsupported push provider '{provider}'. Supported: fcm, console."
    )
