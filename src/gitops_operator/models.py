# ABOUTME: Data model for one reconciliation pass
# ABOUTME: Deployments, decoded configs, skip reasons, states and per-deployment results

"""
Data model shared by the decoder, the synchronizer and the orchestrator.

Nothing here is persisted. A DeploymentConfig is decoded fresh from the live
annotations at the start of every pass and thrown away at the end, so the
annotations stay the single source of truth.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING, Any, Literal

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from kubernetes.client import V1Deployment


class TagType(StrEnum):
    """How a git revision is rendered as an image tag."""

    SHORT = "short"
    LONG = "long"

    def render(self, sha: str) -> str:
        return sha[:7] if self is TagType.SHORT else sha


class ReconcileState(StrEnum):
    """Observability label for where a deployment's pipeline ended up."""

    QUEUED = "queued"
    CHECKING = "checking"
    UP_TO_DATE = "up_to_date"
    UPDATING = "updating"
    NOTIFYING = "notifying"
    DONE = "done"
    FAILED = "failed"


# =============================================================================
# IMAGE REFERENCES
# =============================================================================

_DIGEST_RE = re.compile(r"@[A-Za-z0-9_+.-]+:[A-Fa-f0-9]+$")


@dataclass(frozen=True)
class ImageReference:
    """
    A container image reference split into its parts.

    "registry.local:5000/team/app:abc123@sha256:..." parses to
    repository="registry.local:5000/team/app", tag="abc123", digest="sha256:...".
    The port colon is never mistaken for a tag separator because the tag is
    only looked for after the last slash.
    """

    repository: str
    tag: str | None = None
    digest: str | None = None

    @classmethod
    def parse(cls, ref: str) -> ImageReference:
        ref = ref.strip()
        digest = None
        match = _DIGEST_RE.search(ref)
        if match:
            digest = match.group(0)[1:]
            ref = ref[: match.start()]

        slash = ref.rfind("/")
        colon = ref.rfind(":")
        if colon > slash:
            return cls(repository=ref[:colon], tag=ref[colon + 1 :] or None, digest=digest)
        return cls(repository=ref, digest=digest)

    def matches(self, image_name: str) -> bool:
        """True if this reference is the image named by the annotation."""
        name = ImageReference.parse(image_name).repository
        return self.repository == name or self.repository.endswith(f"/{name}")

    def with_tag(self, tag: str) -> ImageReference:
        # A digest would keep pinning the old image, so it is dropped.
        return ImageReference(repository=self.repository, tag=tag)

    def __str__(self) -> str:
        ref = self.repository
        if self.tag:
            ref += f":{self.tag}"
        if self.digest:
            ref += f"@{self.digest}"
        return ref


# =============================================================================
# LIVE DEPLOYMENTS
# =============================================================================


@dataclass
class Deployment:
    """
    The slice of a live Kubernetes Deployment the reconciler needs.

    Built from kubernetes' V1Deployment model with from_api_object(), or
    directly in tests.
    """

    name: str
    namespace: str
    annotations: dict[str, str] = field(default_factory=dict)
    images: list[str] = field(default_factory=list)

    @classmethod
    def from_api_object(cls, obj: V1Deployment) -> Deployment:
        metadata = obj.metadata
        containers = []
        if obj.spec and obj.spec.template and obj.spec.template.spec:
            containers = obj.spec.template.spec.containers or []

        return cls(
            name=metadata.name or "",
            namespace=metadata.namespace or "",
            annotations=dict(metadata.annotations or {}),
            images=[c.image for c in containers if c.image],
        )

    def image_for(self, image_name: str) -> ImageReference | None:
        """Image of the container running image_name, else the first container."""
        refs = [ImageReference.parse(image) for image in self.images]
        for ref in refs:
            if ref.matches(image_name):
                return ref
        return refs[0] if refs else None

    def current_revision(self, image_name: str) -> str:
        """Tag currently running in the cluster; the comparison baseline."""
        ref = self.image_for(image_name)
        if ref is None:
            return ""
        return ref.tag or "latest"


# =============================================================================
# DECODED CONFIGURATION
# =============================================================================


class DeploymentConfig(BaseModel):
    """Typed view of one Deployment's gitops annotations."""

    enabled: bool
    namespace: str
    app_repository: str
    manifest_repository: str
    image_name: str
    deployment_path: str
    observe_branch: str = "master"
    tag_type: TagType = TagType.LONG
    ssh_key_name: str
    ssh_key_namespace: str
    notifications_secret_name: str | None = None
    notifications_secret_namespace: str | None = None
    registry_url: str | None = None
    registry_secret_name: str | None = None
    registry_secret_namespace: str | None = None
    state: ReconcileState = ReconcileState.QUEUED


class SkipKind(StrEnum):
    NOT_MANAGED = "not_managed"
    DISABLED = "disabled"
    MISSING_KEYS = "missing_keys"
    INVALID_VALUE = "invalid_value"


@dataclass(frozen=True)
class SkipReason:
    """Why a Deployment produced no DeploymentConfig."""

    kind: SkipKind
    detail: str
    missing: tuple[str, ...] = ()

    @property
    def malformed(self) -> bool:
        """Opted in, but the annotations cannot be acted on."""
        return self.kind in (SkipKind.MISSING_KEYS, SkipKind.INVALID_VALUE)

    def __str__(self) -> str:
        return self.detail


# =============================================================================
# RESULTS
# =============================================================================


class ReconcileResult(BaseModel):
    """Outcome of one deployment's pipeline within a pass."""

    status: Literal["success", "failure"]
    message: str
    deployment: str
    namespace: str
    state: ReconcileState

    @property
    def ok(self) -> bool:
        return self.status == "success"

    @classmethod
    def success(
        cls,
        message: str,
        deployment: Deployment,
        state: ReconcileState = ReconcileState.DONE,
    ) -> ReconcileResult:
        return cls(
            status="success",
            message=message,
            deployment=deployment.name,
            namespace=deployment.namespace,
            state=state,
        )

    @classmethod
    def failure(
        cls,
        message: str,
        deployment: Deployment,
        state: ReconcileState = ReconcileState.FAILED,
    ) -> ReconcileResult:
        return cls(
            status="failure",
            message=message,
            deployment=deployment.name,
            namespace=deployment.namespace,
            state=state,
        )


class DebugEntry(BaseModel):
    """Read-only view returned by the debug surface."""

    name: str
    namespace: str
    container: str
    version: str
    annotations: dict[str, str] = Field(default_factory=dict)
    config: DeploymentConfig

    def as_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
