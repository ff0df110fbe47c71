# ABOUTME: Decodes Deployment annotations into a typed DeploymentConfig
# ABOUTME: Returns either a config or a structured SkipReason; never raises

"""
Annotation decoder.

Operators opt a Deployment in with annotations under a fixed prefix:

    gitops.operator.enabled: "true"
    gitops.operator.app_repository: git@github.com:org/app.git
    gitops.operator.manifest_repository: git@github.com:org/manifests.git
    gitops.operator.image_name: registry.example.com/org/app
    gitops.operator.deployment_path: apps/app/deployment.yaml
    gitops.operator.ssh_key_name: deploy-key
    gitops.operator.ssh_key_namespace: gitops-operator

decode_annotations() turns that map into a DeploymentConfig, or into a
SkipReason explaining exactly why it did not. It is a pure function; the
orchestrator decides whether a skip is informational or a diagnostic failure.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from urllib.parse import urlsplit

from gitops_operator.models import DeploymentConfig, SkipKind, SkipReason, TagType

PREFIX = "gitops.operator."

REQUIRED_KEYS = (
    "enabled",
    "app_repository",
    "manifest_repository",
    "image_name",
    "deployment_path",
    "namespace",
    "ssh_key_name",
    "ssh_key_namespace",
)

# Legacy spelling used by earlier releases for the registry URL.
_REGISTRY_URL_KEYS = ("registry_url", "registry_secret_url")

_SCP_LIKE = re.compile(r"^(?:[^@/\s]+@)?[^:/\s]+:(?!//)\S+$")
_SSH_SCHEMES = frozenset({"ssh", "git+ssh", "ssh+git", "file"})


def is_ssh_url(url: str) -> bool:
    """True for scp-like (git@host:path), ssh:// and file:// repository URLs."""
    url = url.strip()
    if "://" in url:
        parts = urlsplit(url)
        if parts.scheme not in _SSH_SCHEMES:
            return False
        return bool(parts.path.strip("/")) and (parts.scheme == "file" or bool(parts.hostname))
    return bool(_SCP_LIKE.match(url))


def _get(annotations: Mapping[str, str], key: str) -> str | None:
    value = annotations.get(PREFIX + key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def decode_annotations(
    annotations: Mapping[str, str],
    namespace: str | None = None,
) -> DeploymentConfig | SkipReason:
    """
    Decode a Deployment's annotations.

    Args:
        annotations: The raw metadata.annotations map.
        namespace: The Deployment's own namespace, used when the
            namespace annotation is absent.

    Returns:
        DeploymentConfig when every required key is present and valid,
        otherwise a SkipReason. Never a partially populated config.
    """
    enabled = annotations.get(PREFIX + "enabled")
    if enabled is None:
        return SkipReason(SkipKind.NOT_MANAGED, "no gitops.operator.enabled annotation")
    if enabled == "false":
        return SkipReason(SkipKind.DISABLED, "gitops.operator.enabled is \"false\"")
    if enabled != "true":
        return SkipReason(
            SkipKind.DISABLED,
            f"gitops.operator.enabled is {enabled!r}, not \"true\"; treated as disabled",
        )

    values = {key: _get(annotations, key) for key in REQUIRED_KEYS}
    if values["namespace"] is None and namespace:
        values["namespace"] = namespace

    missing = tuple(PREFIX + key for key, value in values.items() if value is None)
    if missing:
        return SkipReason(
            SkipKind.MISSING_KEYS,
            f"missing required annotation(s): {', '.join(missing)}",
            missing=missing,
        )

    for key in ("app_repository", "manifest_repository"):
        if not is_ssh_url(values[key]):
            return SkipReason(
                SkipKind.INVALID_VALUE,
                f"{PREFIX}{key} is not an SSH repository URL: {values[key]!r}",
            )

    tag_type = TagType.SHORT if _get(annotations, "tag_type") == "short" else TagType.LONG
    registry_url = next(
        (url for url in (_get(annotations, k) for k in _REGISTRY_URL_KEYS) if url), None
    )

    return DeploymentConfig(
        enabled=True,
        namespace=values["namespace"],
        app_repository=values["app_repository"],
        manifest_repository=values["manifest_repository"],
        image_name=values["image_name"],
        deployment_path=values["deployment_path"],
        observe_branch=_get(annotations, "observe_branch") or "master",
        tag_type=tag_type,
        ssh_key_name=values["ssh_key_name"],
        ssh_key_namespace=values["ssh_key_namespace"],
        notifications_secret_name=_get(annotations, "notifications_secret_name"),
        notifications_secret_namespace=_get(annotations, "notifications_secret_namespace"),
        registry_url=registry_url,
        registry_secret_name=_get(annotations, "registry_secret_name"),
        registry_secret_namespace=_get(annotations, "registry_secret_namespace"),
    )
