# ABOUTME: Docker Registry v2 client and the pre-update image existence gate
# ABOUTME: HEADs the manifest for a tag, handling bearer token challenges, via httpx

"""
Registry checks.

Before the manifest is pointed at a new tag, the reconciler asks the
registry whether an image with that tag exists. Pointing the cluster at a
tag CI has not pushed yet would leave pods in ImagePullBackOff.

=============================================================================
PROTOCOL
=============================================================================

    HEAD /v2/<repository>/manifests/<tag>

    200        -> present
    404        -> absent
    401        -> read the WWW-Authenticate challenge:
                  Bearer realm="https://auth.example.com/token",
                         service="registry.example.com",
                         scope="repository:org/app:pull"
                  GET realm?service=..&scope=.. (basic auth if we have it),
                  then repeat the HEAD with "Authorization: Bearer <token>"
    401 / 403 after auth -> RegistryAuthError
    5xx, transport error -> RegistryUnavailable (retried)

=============================================================================
GATE OUTCOMES
=============================================================================

RegistryResolver.check() never raises. It folds every outcome into an
ImageStatus the orchestrator acts on: skipped (no registry annotated),
present, absent, unverified (with a warning saying why).
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import httpx
import structlog

from gitops_operator.config import RetryPolicy
from gitops_operator.errors import (
    ClusterError,
    RegistryAuthError,
    RegistryUnavailable,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from gitops_operator.models import DeploymentConfig
    from gitops_operator.utils.cluster import ClusterClient

logger = structlog.get_logger(__name__)

MANIFEST_ACCEPT = ", ".join(
    [
        "application/vnd.oci.image.index.v1+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.docker.distribution.manifest.v2+json",
    ]
)

_CHALLENGE_PARAM = re.compile(r'(\w+)="([^"]*)"')


def parse_bearer_challenge(header: str) -> dict[str, str] | None:
    """Parameters of a Bearer WWW-Authenticate header, or None for other schemes."""
    scheme, _, params = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return {k.lower(): v for k, v in _CHALLENGE_PARAM.findall(params)}


def registry_base_url(registry_url: str) -> str:
    """
    Normalize an annotated registry URL to its origin.

        registry.example.com           -> https://registry.example.com
        https://registry.example.com/v2/ -> https://registry.example.com
        http://localhost:5000          -> http://localhost:5000
    """
    url = registry_url.strip()
    if "://" not in url:
        url = f"https://{url}"
    parts = urlsplit(url)
    return f"{parts.scheme}://{parts.netloc}"


def repository_path(image_name: str, registry_url: str) -> str:
    """Image repository relative to the registry: the host prefix is dropped."""
    host = urlsplit(registry_base_url(registry_url)).netloc
    name = image_name.strip()
    if name.startswith(f"{host}/"):
        name = name[len(host) + 1 :]
    return name.strip("/")


# =============================================================================
# REGISTRY CLIENT
# =============================================================================


class RegistryClient:
    """
    Async Docker Registry v2 client.

    USAGE:
    ------
        async with RegistryClient("registry.example.com", "user", "pass") as client:
            exists = await client.image_exists("org/app", "abc1234")
    """

    def __init__(
        self,
        registry_url: str,
        username: str | None = None,
        password: str | None = None,
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._base_url = registry_base_url(registry_url)
        self._registry_url = registry_url
        self._auth = (username, password) if username is not None and password is not None else None
        self._timeout = timeout
        self._retry = retry_policy or RetryPolicy()
        self._client: httpx.AsyncClient | None = None
        self._token: str | None = None

    async def __aenter__(self) -> RegistryClient:
        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            timeout=self._timeout,
            follow_redirects=True,
        )
        return self

    async def __aexit__(self, *args: Any) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    async def image_exists(self, image_name: str, tag: str) -> bool:
        """
        Whether image_name:tag is published.

        Raises:
            RegistryAuthError: Credentials rejected, or none and anonymous
                pull is not allowed.
            RegistryUnavailable: The registry could not be reached after
                retries, or kept answering 5xx.
        """
        client = self._client
        if client is None:
            raise RuntimeError("Client not initialized. Use 'async with' context manager.")

        path = f"/v2/{repository_path(image_name, self._registry_url)}/manifests/{tag}"
        log = logger.bind(registry=self._base_url, path=path)

        async for attempt in self._retry.async_retrying(RegistryUnavailable):
            with attempt:
                response = await self._head(client, path)
                if response.status_code == 401 and self._token is None:
                    challenge = parse_bearer_challenge(
                        response.headers.get("www-authenticate", "")
                    )
                    if challenge and challenge.get("realm"):
                        self._token = await self._fetch_token(client, challenge)
                        response = await self._head(client, path)

                log.debug("Registry manifest lookup", status=response.status_code)
                if response.status_code == 200:
                    return True
                if response.status_code == 404:
                    return False
                if response.status_code in (401, 403):
                    raise RegistryAuthError(
                        f"Registry {self._base_url} refused access to {path}",
                        f"HTTP {response.status_code}",
                    )
                if response.status_code == 429 or response.status_code >= 500:
                    raise RegistryUnavailable(
                        f"Registry {self._base_url} unavailable",
                        f"HTTP {response.status_code}",
                    )
                raise RegistryUnavailable(
                    f"Unexpected registry response for {path}",
                    f"HTTP {response.status_code}",
                )
        raise AssertionError("unreachable")  # pragma: no cover

    async def _head(self, client: httpx.AsyncClient, path: str) -> httpx.Response:
        headers = {"Accept": MANIFEST_ACCEPT}
        auth: httpx.Auth | tuple[str, str] | None = None
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        elif self._auth:
            auth = self._auth
        try:
            return await client.head(path, headers=headers, auth=auth)
        except httpx.TransportError as e:
            raise RegistryUnavailable(f"Registry {self._base_url} unreachable", str(e)) from e

    async def _fetch_token(self, client: httpx.AsyncClient, challenge: dict[str, str]) -> str:
        params = {k: challenge[k] for k in ("service", "scope") if challenge.get(k)}
        try:
            response = await client.get(
                challenge["realm"], params=params, auth=self._auth
            )
        except httpx.TransportError as e:
            raise RegistryUnavailable("Registry token endpoint unreachable", str(e)) from e

        if response.status_code in (401, 403):
            raise RegistryAuthError(
                f"Registry token endpoint rejected credentials for {self._base_url}",
                f"HTTP {response.status_code}",
            )
        if response.status_code >= 400:
            raise RegistryUnavailable(
                "Registry token endpoint failed", f"HTTP {response.status_code}"
            )

        try:
            body = response.json()
        except ValueError as e:
            raise RegistryUnavailable("Registry token endpoint returned invalid JSON") from e
        token = body.get("token") or body.get("access_token")
        if not token:
            raise RegistryAuthError("Registry token endpoint returned no token")
        return token


# =============================================================================
# RESOLVER
# =============================================================================


class ImageStatus(StrEnum):
    SKIPPED = "skipped"
    PRESENT = "present"
    ABSENT = "absent"
    UNVERIFIED = "unverified"


@dataclass(frozen=True)
class RegistryCheck:
    status: ImageStatus
    warning: str | None = None


class RegistryResolver:
    """
    Turns a DeploymentConfig and a tag into an ImageStatus.

    Credentials come from the annotated registry secret, or from the
    operator-wide default secret when none is annotated.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        default_secret_name: str = "regcred",
        default_secret_namespace: str = "gitops-operator",
        timeout: float = 30.0,
        retry_policy: RetryPolicy | None = None,
        client_factory: Callable[..., RegistryClient] = RegistryClient,
    ) -> None:
        self._cluster = cluster
        self._default_secret_name = default_secret_name
        self._default_secret_namespace = default_secret_namespace
        self._timeout = timeout
        self._retry = retry_policy or RetryPolicy()
        self._client_factory = client_factory

    async def check(self, config: DeploymentConfig, tag: str) -> RegistryCheck:
        if not config.registry_url:
            return RegistryCheck(ImageStatus.SKIPPED)

        secret_name = config.registry_secret_name or self._default_secret_name
        secret_namespace = config.registry_secret_namespace or self._default_secret_namespace
        log = logger.bind(registry=config.registry_url, image=config.image_name, tag=tag)

        warning = None
        username = password = None
        try:
            username, password = await self._cluster.get_registry_auth(
                secret_name, secret_namespace, config.registry_url
            )
        except ClusterError as e:
            warning = f"registry credentials unavailable ({e}); checked anonymously"
            log.warning("Registry credentials unavailable", error=str(e))

        client = self._client_factory(
            config.registry_url,
            username=username,
            password=password,
            timeout=self._timeout,
            retry_policy=self._retry,
        )
        try:
            async with client:
                exists = await client.image_exists(config.image_name, tag)
        except (RegistryAuthError, RegistryUnavailable) as e:
            log.warning("Registry check inconclusive", error=str(e))
            return RegistryCheck(ImageStatus.UNVERIFIED, f"image {tag} not verified: {e}")

        if exists:
            return RegistryCheck(ImageStatus.PRESENT, warning)
        return RegistryCheck(ImageStatus.ABSENT, warning)
