import google.auth.credentials
import google.auth.exceptions
import pytest
import requests
from google.auth.transport.requests import AuthorizedSession

import push_client
from notify import Notification
from push_client import ConsoleProvider, FCMClient, SendResult, make_provider


class FakeResponse:
    def __init__(self, status_code, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    @property
    def ok(self):
        return self.status_code < 400

    def json(self):
        if self._payload is None:
            raise ValueError("no json")
        return self._payload


RESPONSES = {
    "ok": FakeResponse(200, {"name": "projects/p/messages/1"}),
    "unregistered": FakeResponse(
        404,
        {
            "error": {
                "status": "NOT_FOUND",
                "message": "Requested entity was not found.",
                "details": [{"errorCode": "UNREGISTERED"}],
            }
        },
    ),
    "not-found": FakeResponse(404, text="gone"),
    "bad-token": FakeResponse(
        400,
        {
            "error": {
                "status": "INVALID_ARGUMENT",
                "message": "The registration token is not a valid FCM token",
            }
        },
    ),
    "server-error": FakeResponse(
        500, {"error": {"status": "INTERNAL", "message": "oops"}}
    ),
}


class FakeSession:
    def __init__(self):
        self.posts = []

    def post(self, url, json, headers, timeout):
        token = json["message"]["token"]
        self.posts.append((url, json, headers))
        if token == "unreachable":
            raise requests.ConnectionError("connection refused")
        return RESPONSES[token]


class RotatingCredentials(google.auth.credentials.Credentials):
    """Hands out token-1, token-2, ... on each refresh."""

    project_id = "flood-app"

    def __init__(self):
        super().__init__()
        self.refreshes = 0

    def refresh(self, request):
        self.refreshes += 1
        self.token = f"token-{self.refreshes}"


@pytest.fixture
def fcm():
    session = FakeSession()
    client = FCMClient(project_id="flood-app", session=session, max_workers=4)
    client.posts = session.posts
    return client


def test_multicast_classifies_each_token(fcm):
    tokens = list(RESPONSES) + ["unreachable"]
    message = fcm.build_message(Notification("t", "b", {"deviceId": "RIVER-01"}))

    results = {r.token: r for r in fcm.send_multicast(tokens, message)}

    assert results["ok"].success
    assert results["unregistered"].error_code == "UNREGISTERED"
    assert results["not-found"].error_code == "NOT_FOUND"
    assert results["bad-token"].error_code == "INVALID_REGISTRATION"
    assert results["server-error"].error_code == "INTERNAL"
    assert results["unreachable"].error_code == "TRANSPORT"

    gone = sorted(t for t, r in results.items() if r.endpoint_gone)
    assert gone == ["bad-token", "not-found", "unregistered"]


def test_send_uses_v1_endpoint(fcm):
    fcm.send_multicast(["ok"], fcm.build_message(Notification("t", "b")))

    url, body, headers = fcm.posts[0]
    assert url == "https://fcm.googleapis.com/v1/projects/flood-app/messages:send"
    assert "Authorization" not in headers
    assert body["message"]["token"] == "ok"


def test_empty_multicast_sends_nothing(fcm):
    assert fcm.send_multicast([], {}) == []
    assert fcm.posts == []


def test_message_data_values_are_strings():
    client = FCMClient(project_id="p", session=FakeSession())
    message = client.build_message(
        Notification(
            "Flood",
            "high",
            {"waterLevel_cm": 245.0, "location": None},
            url="https://dash.example/dashboard?deviceId=RIVER-01",
        )
    )

    assert message["data"]["waterLevel_cm"] == "245.0"
    assert message["data"]["location"] == ""
    assert message["webpush"]["fcm_options"]["link"].startswith("https://")


def test_plain_http_link_is_not_sent_to_web_clients():
    client = FCMClient(project_id="p", session=FakeSession())
    message = client.build_message(Notification("t", "b", url="http://localhost:3000"))

    assert "webpush" not in message
    assert message["data"]["url"] == "http://localhost:3000"


def test_transient_errors_are_not_gone():
    assert not SendResult("t", False, "UNAVAILABLE").endpoint_gone
    assert not SendResult("t", True).endpoint_gone


def test_console_provider_delivers_everything():
    provider = ConsoleProvider()
    message = provider.build_message(Notification("t", "b"))

    results = provider.send_multicast(["a", "b"], message)

    assert all(r.success for r in results)


def test_expired_token_is_refreshed_and_send_retried(monkeypatch):
    seen = []

    def fake_request(self, method, url, data=None, headers=None, **kwargs):
        auth = {k.lower(): v for k, v in (headers or {}).items()}["authorization"]
        seen.append(auth)
        if auth == "Bearer token-1":
            return FakeResponse(
                401, {"error": {"status": "UNAUTHENTICATED", "message": "expired"}}
            )
        return RESPONSES["ok"]

    monkeypatch.setattr(requests.Session, "request", fake_request)
    credentials = RotatingCredentials()
    client = FCMClient.from_credentials(credentials, max_workers=1)

    results = client.send_multicast(["phone"], {"data": {}})

    assert isinstance(client.session, AuthorizedSession)
    assert results[0].success
    assert seen == ["Bearer token-1", "Bearer token-2"]
    assert credentials.refreshes == 2


def test_credential_failure_is_reported_per_token():
    class BrokenCredentials(RotatingCredentials):
        def refresh(self, request):
            raise google.auth.exceptions.RefreshError("invalid_grant")

    client = FCMClient.from_credentials(BrokenCredentials(), max_workers=1)

    results = client.send_multicast(["a", "b"], {"data": {}})

    assert [r.error_code for r in results] == ["AUTH", "AUTH"]
    assert not any(r.endpoint_gone for r in results)


def test_make_provider(monkeypatch):
    loaded = []

    def fake_from_file(path, scopes):
        loaded.append((path, scopes))
        return RotatingCredentials()

    monkeypatch.setattr(
        push_client.service_account.Credentials,
        "from_service_account_file",
        fake_from_file,
    )

    assert isinstance(make_provider({}), ConsoleProvider)
    fcm = make_provider(
        {"provider": "fcm", "fcm": {"service_account_file": "key.json"}}
    )
    assert isinstance(fcm, FCMClient)
    assert fcm.project_id == "flood-app"
    assert loaded == [("key.json", [push_client.FCM_SCOPE])]
    with pytest.raises(ValueError):
        make_provider({"provider": "apns"})
