"""
Pytest configuration and shared fixtures.

Every test builds its own Settings pointing at files under tmp_path, and the
app's outbound HTTP client runs on an httpx.MockTransport, so no test touches
the network or the working directory.
"""

import json
import os

import httpx
import pytest
from fastapi.testclient import TestClient

# Baseline environment for anything that reads settings from the environment
os.environ.setdefault("TWILIO_ACCOUNT_SID", "ACtest00000000000000000000000000")
os.environ.setdefault("TWILIO_AUTH_TOKEN", "test-auth-token")
os.environ.setdefault("FORWARD_TO_NUMBER", "+15559876543")
os.environ.setdefault("WEBHOOK_URL", "https://hooks.example.com/relay")

from sms_forwarder.config import Settings, get_settings
from sms_forwarder.main import create_app

get_settings.cache_clear()


FORWARD_TO = "+15559876543"
WEBHOOK_URL = "https://hooks.example.com/relay"
PUSH_URL = "https://push.example.com/--/api/v2/push/send"


class FakeUpstream:
    """
    Stands in for the push delivery service and the webhook target.

    Requests are recorded as parsed JSON. By default the push service accepts
    every notification and the webhook target answers 200.
    """

    def __init__(self):
        self.push_requests = []
        self.webhook_requests = []
        self.push_results = None
        self.push_status = 200
        self.webhook_status = 200
        self.fail_push = False
        self.fail_webhook = False

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        if str(request.url) == PUSH_URL:
            self.push_requests.append(body)
            if self.fail_push:
                raise httpx.ConnectError("push service unreachable", request=request)
            results = self.push_results
            if results is None:
                results = [{"status": "ok", "id": f"ticket-{i}"} for i in range(len(body))]
            return httpx.Response(self.push_status, json={"data": results})

        self.webhook_requests.append(body)
        if self.fail_webhook:
            raise httpx.ConnectError("webhook target unreachable", request=request)
        return httpx.Response(self.webhook_status, json={"received": True})


def not_registered(message: str = "device gone") -> dict:
    """Push ticket flagging a permanently invalid token."""
    return {"status": "error", "message": message, "details": {"error": "DeviceNotRegistered"}}


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def http_client(upstream):
    return httpx.AsyncClient(transport=httpx.MockTransport(upstream))


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        TWILIO_ACCOUNT_SID="ACtest00000000000000000000000000",
        TWILIO_AUTH_TOKEN="test-auth-token",
        FORWARD_TO_NUMBER=FORWARD_TO,
        WEBHOOK_URL=WEBHOOK_URL,
        PUSH_SERVICE_URL=PUSH_URL,
        MESSAGES_FILE=str(tmp_path / "messages.json"),
        PUSH_TOKENS_FILE=str(tmp_path / "push-tokens.json"),
    )


@pytest.fixture
def app(settings, http_client):
    return create_app(settings, http_client=http_client)


@pytest.fixture
def client(app):
    """Test client with lifespan run, backed by empty stores under tmp_path."""
    with TestClient(app) as test_client:
        yield test_client
