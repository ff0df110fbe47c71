# ABOUTME: Best-effort webhook notifications for deployment update outcomes
# ABOUTME: Resolves the webhook URL from a Secret and posts a Slack-compatible JSON body

"""
Notifications.

After an update is pushed (or fails to be), the reconciler posts a short
message to a webhook. The URL lives in the `webhook-url` key of a Secret so
it never appears in annotations or logs.

Delivery is best-effort: notify() logs and returns False on any failure. A
down chat service must never turn a successful update into a failed one.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

import httpx
import structlog
from pydantic import BaseModel

from gitops_operator.errors import ClusterError, NotifyError

if TYPE_CHECKING:
    from gitops_operator.utils.cluster import ClusterClient

logger = structlog.get_logger(__name__)


class Notification(BaseModel):
    """One update outcome, rendered for a chat webhook."""

    deployment: str
    namespace: str
    outcome: Literal["updated", "failed"]
    revision: str
    message: str

    @classmethod
    def updated(cls, deployment: str, namespace: str, revision: str) -> Notification:
        return cls(
            deployment=deployment,
            namespace=namespace,
            outcome="updated",
            revision=revision,
            message=f"Deployment {deployment} has been patched successfully to version: {revision}",
        )

    @classmethod
    def failed(cls, deployment: str, namespace: str, revision: str, error: str) -> Notification:
        return cls(
            deployment=deployment,
            namespace=namespace,
            outcome="failed",
            revision=revision,
            message=f"Failed to patch deployment: {deployment} to version: {revision} ({error})",
        )

    def to_webhook_body(self) -> dict[str, str]:
        """Slack, Mattermost and Google Chat all accept {"text": ...}."""
        return {"text": self.message}


class Notifier:
    def __init__(
        self,
        cluster: ClusterClient,
        timeout: float = 30.0,
        default_namespace: str = "gitops-operator",
    ) -> None:
        self._cluster = cluster
        self._timeout = timeout
        self._default_namespace = default_namespace

    async def send(self, endpoint: str, payload: Notification) -> None:
        """
        POST payload to endpoint.

        Raises:
            NotifyError: Transport failure or a non-2xx answer.
        """
        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                response = await client.post(endpoint, json=payload.to_webhook_body())
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            raise NotifyError("Webhook request failed", type(e).__name__) from e

        if not response.is_success:
            raise NotifyError("Webhook rejected notification", f"HTTP {response.status_code}")

    async def notify(
        self,
        secret_name: str,
        secret_namespace: str | None,
        payload: Notification,
    ) -> bool:
        """
        Resolve the webhook from a Secret and deliver payload.

        Returns:
            True if delivered. Never raises.
        """
        namespace = secret_namespace or self._default_namespace
        log = logger.bind(
            deployment=payload.deployment,
            namespace=payload.namespace,
            outcome=payload.outcome,
            secret=f"{namespace}/{secret_name}",
        )
        try:
            endpoint = await self._cluster.get_webhook_url(secret_name, namespace)
            await self.send(endpoint, payload)
        except (ClusterError, NotifyError) as e:
            log.warning("Notification not delivered", error=str(e))
            return False

        log.info("Notification delivered")
        return True
