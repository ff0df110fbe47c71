# ABOUTME: Kubernetes API access for listing Deployments and reading Secrets
# ABOUTME: Wraps the blocking kubernetes client in worker threads with retry and error mapping

"""
Cluster access.

The official kubernetes client is synchronous. Every call runs in a worker
thread through asyncio.to_thread so a slow API server never stalls the other
pipelines of a pass. Failures are mapped onto the error taxonomy:

    401 / 403            -> ClusterAuthError      (not retried)
    404                  -> ResourceNotFound      (not retried; SecretNotFound for Secrets)
    5xx, 429, transport  -> ClusterUnavailable    (retried by RetryPolicy)
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import structlog
import urllib3
from kubernetes import client as k8s_client
from kubernetes import config as k8s_config
from kubernetes.client.exceptions import ApiException

from gitops_operator.config import RetryPolicy
from gitops_operator.errors import (
    ClusterAuthError,
    ClusterError,
    ClusterUnavailable,
    ResourceNotFound,
    SecretMalformed,
    SecretNotFound,
)
from gitops_operator.models import Deployment

if TYPE_CHECKING:
    from collections.abc import Callable

    from gitops_operator.config import OperatorSettings

logger = structlog.get_logger(__name__)

SSH_KEY_FIELD = "ssh-privatekey"
WEBHOOK_URL_FIELD = "webhook-url"
DOCKERCONFIG_FIELD = ".dockerconfigjson"


def _map_api_exception(
    e: ApiException, what: str, not_found: type[ClusterError] = ResourceNotFound
) -> ClusterError:
    status = e.status or 0
    details = f"HTTP {status} {e.reason or ''}".strip()
    if status in (401, 403):
        return ClusterAuthError(f"Kubernetes API denied access to {what}", details)
    if status == 404:
        return not_found(f"{what} not found", details)
    if status == 429 or status >= 500 or status == 0:
        return ClusterUnavailable(f"Kubernetes API unavailable while reading {what}", details)
    return ClusterError(f"Kubernetes API error while reading {what}", details)


class ClusterClient:
    """Async facade over AppsV1Api and CoreV1Api."""

    def __init__(
        self,
        apps_api: k8s_client.AppsV1Api,
        core_api: k8s_client.CoreV1Api,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._apps = apps_api
        self._core = core_api
        self._retry = retry_policy or RetryPolicy()

    @classmethod
    def from_settings(cls, settings: OperatorSettings) -> ClusterClient:
        """
        Load cluster credentials.

        Order: explicit kubeconfig, in-cluster service account, default
        kubeconfig (~/.kube/config).
        """
        if settings.kubeconfig:
            k8s_config.load_kube_config(
                config_file=str(settings.kubeconfig), context=settings.kube_context
            )
            logger.info("Loaded kubeconfig", kubeconfig=str(settings.kubeconfig))
        else:
            try:
                k8s_config.load_incluster_config()
                logger.info("Loaded in-cluster configuration")
            except k8s_config.ConfigException:
                k8s_config.load_kube_config(context=settings.kube_context)
                logger.info("Loaded default kubeconfig", context=settings.kube_context)

        api_client = k8s_client.ApiClient()
        return cls(
            apps_api=k8s_client.AppsV1Api(api_client),
            core_api=k8s_client.CoreV1Api(api_client),
            retry_policy=settings.retry,
        )

    async def _call(
        self,
        what: str,
        fn: Callable[..., Any],
        *args: Any,
        not_found: type[ClusterError] = ResourceNotFound,
        **kwargs: Any,
    ) -> Any:
        async for attempt in self._retry.async_retrying(ClusterUnavailable):
            with attempt:
                try:
                    return await asyncio.to_thread(fn, *args, **kwargs)
                except ApiException as e:
                    raise _map_api_exception(e, what, not_found) from e
                except urllib3.exceptions.HTTPError as e:
                    raise ClusterUnavailable(
                        f"Kubernetes API unreachable while reading {what}", str(e)
                    ) from e
        raise AssertionError("unreachable")  # pragma: no cover

    # =========================================================================
    # DEPLOYMENTS
    # =========================================================================

    async def list_deployments(self, namespaces: list[str] | None = None) -> list[Deployment]:
        """
        List Deployments in listing order.

        Args:
            namespaces: Restrict to these namespaces, in this order.
                None or empty lists every namespace the service account sees.
        """
        objects: list[Any] = []
        if namespaces:
            for namespace in namespaces:
                objects.extend(
                    await self._list_pages(
                        f"deployments in {namespace}",
                        self._apps.list_namespaced_deployment,
                        namespace,
                    )
                )
        else:
            objects = await self._list_pages(
                "deployments", self._apps.list_deployment_for_all_namespaces
            )

        deployments = [Deployment.from_api_object(obj) for obj in objects]
        logger.debug("Listed deployments", count=len(deployments))
        return deployments

    async def _list_pages(self, what: str, fn: Callable[..., Any], *args: Any) -> list[Any]:
        items: list[Any] = []
        token: str | None = None
        while True:
            kwargs: dict[str, Any] = {"limit": 500}
            if token:
                kwargs["_continue"] = token
            page = await self._call(what, fn, *args, **kwargs)
            items.extend(page.items or [])
            token = getattr(page.metadata, "_continue", None) if page.metadata else None
            if not token:
                return items

    # =========================================================================
    # SECRETS
    # =========================================================================

    async def read_secret(self, name: str, namespace: str) -> dict[str, bytes]:
        """Read a Secret and base64-decode its data section."""
        secret = await self._call(
            f"secret {namespace}/{name}",
            self._core.read_namespaced_secret,
            name,
            namespace,
            not_found=SecretNotFound,
        )
        data = secret.data or {}
        try:
            return {key: base64.b64decode(value) for key, value in data.items()}
        except (binascii.Error, ValueError) as e:
            raise SecretMalformed(f"Secret {namespace}/{name} holds invalid base64", str(e)) from e

    async def _read_field(self, name: str, namespace: str, field: str, hint: str) -> str:
        data = await self.read_secret(name, namespace)
        raw = data.get(field)
        if raw is None:
            raise SecretMalformed(f"Secret {namespace}/{name} has no field {field!r}", hint)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise SecretMalformed(f"Field {field!r} of {namespace}/{name} is not UTF-8") from e

    async def get_ssh_key(self, name: str, namespace: str) -> str:
        """Private key used for git over SSH."""
        return await self._read_field(
            name,
            namespace,
            SSH_KEY_FIELD,
            "recreate it with: kubectl create secret generic NAME "
            "--from-file=ssh-privatekey=/path/to/key",
        )

    async def get_webhook_url(self, name: str, namespace: str) -> str:
        """Notification webhook endpoint."""
        url = await self._read_field(
            name,
            namespace,
            WEBHOOK_URL_FIELD,
            "recreate it with: kubectl create secret generic NAME "
            "--from-literal=webhook-url=https://hooks.example.com/...",
        )
        return url.strip()

    async def get_registry_auth(
        self, name: str, namespace: str, registry_url: str
    ) -> tuple[str, str]:
        """
        Username and password for registry_url from a dockerconfigjson Secret.

        The auths entry is matched on the exact registry URL first, then on
        the same host, so "https://registry.example.com/v2/" finds an entry
        keyed "registry.example.com".
        """
        data = await self.read_secret(name, namespace)
        raw = data.get(DOCKERCONFIG_FIELD)
        if raw is None:
            raise SecretMalformed(
                f"Secret {namespace}/{name} has no field {DOCKERCONFIG_FIELD!r}",
                "create it with: kubectl create secret docker-registry NAME ...",
            )
        try:
            auths = json.loads(raw).get("auths", {})
        except (ValueError, AttributeError) as e:
            raise SecretMalformed(f"Secret {namespace}/{name} is not a docker config") from e
        if not isinstance(auths, dict):
            raise SecretMalformed(
                f"Secret {namespace}/{name} is not a docker config",
                f"auths is a {type(auths).__name__}, expected an object",
            )

        entry = auths.get(registry_url)
        if entry is None:
            host = _registry_host(registry_url)
            entry = next((v for k, v in auths.items() if _registry_host(k) == host), None)
        if not isinstance(entry, dict):
            raise SecretMalformed(
                f"Secret {namespace}/{name} has no credentials for {_registry_host(registry_url)}"
            )

        username, password = entry.get("username"), entry.get("password")
        if isinstance(username, str) and isinstance(password, str):
            return username, password
        auth = entry.get("auth")
        if not isinstance(auth, str):
            raise SecretMalformed(f"Secret {namespace}/{name} has an unreadable auth entry")
        try:
            username, _, password = base64.b64decode(auth).decode("utf-8").partition(":")
        except (TypeError, binascii.Error, UnicodeDecodeError) as e:
            raise SecretMalformed(
                f"Secret {namespace}/{name} has an unreadable auth entry"
            ) from e
        return username, password


def _registry_host(url: str) -> str:
    if "://" not in url:
        url = f"https://{url}"
    return (urlsplit(url).netloc or "").lower()
