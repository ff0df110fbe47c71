# ABOUTME: Unit tests for webhook notifications
# ABOUTME: Tests payload rendering, delivery and best-effort failure handling with respx

import json
from unittest.mock import AsyncMock

import httpx
import pytest
import respx

from gitops_operator.errors import NotifyError, SecretMalformed, SecretNotFound
from gitops_operator.utils.notifications import Notification, Notifier

WEBHOOK = "https://hooks.example.com/services/T000/B000"


@pytest.fixture
def cluster() -> AsyncMock:
    fake = AsyncMock()
    fake.get_webhook_url.return_value = WEBHOOK
    return fake


@pytest.fixture
def notifier(cluster: AsyncMock) -> Notifier:
    return Notifier(cluster, timeout=5.0)


@pytest.mark.unit
class TestNotification:
    """Tests for notification payloads."""

    def test_updated_message(self):
        payload = Notification.updated("web", "default", "abc123")

        assert payload.outcome == "updated"
        assert payload.message == "Deployment web has been patched successfully to version: abc123"
        assert payload.to_webhook_body() == {"text": payload.message}

    def test_failed_message_carries_error(self):
        payload = Notification.failed("web", "default", "abc123", "conflict: push rejected")

        assert payload.outcome == "failed"
        assert payload.message.startswith("Failed to patch deployment: web to version: abc123")
        assert "push rejected" in payload.message


@pytest.mark.unit
class TestNotifier:
    """Tests for webhook delivery."""

    @respx.mock
    async def test_send_posts_text_body(self, notifier: Notifier):
        route = respx.post(WEBHOOK).mock(return_value=httpx.Response(200, text="ok"))
        payload = Notification.updated("web", "default", "abc123")

        await notifier.send(WEBHOOK, payload)

        request = route.calls.last.request
        assert json.loads(request.content) == {"text": payload.message}
        assert request.headers["content-type"] == "application/json"

    @respx.mock
    async def test_send_rejects_non_success(self, notifier: Notifier):
        respx.post(WEBHOOK).mock(return_value=httpx.Response(404, text="no_service"))

        with pytest.raises(NotifyError) as exc_info:
            await notifier.send(WEBHOOK, Notification.updated("web", "default", "abc123"))

        assert exc_info.value.details == "HTTP 404"

    @respx.mock
    async def test_send_transport_failure(self, notifier: Notifier):
        respx.post(WEBHOOK).mock(side_effect=httpx.ConnectTimeout("timed out"))

        with pytest.raises(NotifyError) as exc_info:
            await notifier.send(WEBHOOK, Notification.updated("web", "default", "abc123"))

        assert exc_info.value.details == "ConnectTimeout"

    @respx.mock
    async def test_notify_delivers(self, notifier: Notifier, cluster: AsyncMock):
        route = respx.post(WEBHOOK).mock(return_value=httpx.Response(200))

        delivered = await notifier.notify(
            "slack", "ops", Notification.updated("web", "default", "abc123")
        )

        assert delivered is True
        assert route.called
        cluster.get_webhook_url.assert_awaited_once_with("slack", "ops")

    @respx.mock
    async def test_notify_defaults_secret_namespace(
        self, notifier: Notifier, cluster: AsyncMock
    ):
        respx.post(WEBHOOK).mock(return_value=httpx.Response(200))

        await notifier.notify("slack", None, Notification.updated("web", "default", "abc123"))

        cluster.get_webhook_url.assert_awaited_once_with("slack", "gitops-operator")

    @respx.mock
    async def test_notify_swallows_webhook_failure(self, notifier: Notifier):
        respx.post(WEBHOOK).mock(return_value=httpx.Response(500))

        delivered = await notifier.notify(
            "slack", "ops", Notification.failed("web", "default", "abc123", "boom")
        )

        assert delivered is False

    @pytest.mark.parametrize(
        "error",
        [
            SecretNotFound("secret ops/slack not found"),
            SecretMalformed("Secret ops/slack has no field 'webhook-url'"),
        ],
    )
    async def test_notify_swallows_secret_failure(
        self, notifier: Notifier, cluster: AsyncMock, error: Exception
    ):
        cluster.get_webhook_url.side_effect = error

        delivered = await notifier.notify(
            "slack", "ops", Notification.updated("web", "default", "abc123")
        )

        assert delivered is False

    async def test_notify_invalid_url(self, notifier: Notifier, cluster: AsyncMock):
        cluster.get_webhook_url.return_value = "not a url"

        delivered = await notifier.notify(
            "slack", "ops", Notification.updated("web", "default", "abc123")
        )

        assert delivered is False
