# ABOUTME: Exception hierarchy for the GitOps reconciler
# ABOUTME: Taxonomy classes (config/auth/network/conflict/not_found) and component errors

"""
Structured errors for every component of the reconciler.

Two axes meet here. The TAXONOMY says how an error is handled:

    ConfigError     malformed input, reported, never retried
    AuthError       credentials rejected, reported, not retried this pass
    NetworkError    transient transport failure, retried with backoff
    ConflictError   remote moved on (non-fast-forward), next pass resolves it
    NotFoundError   branch/path/image missing, needs an operator

The COMPONENT says where it came from (git, cluster, registry, notifier).
Concrete errors inherit from both, so callers can catch whichever axis
they care about:

    try:
        await git.apply_update(...)
    except NetworkError:
        ...  # retry
    except GitError as e:
        ...  # anything git-related
"""

from __future__ import annotations


class GitopsError(Exception):
    """Base error carrying a human-readable message and optional details."""

    kind = "error"

    def __init__(self, message: str, details: str | None = None) -> None:
        self.message = message
        self.details = details
        super().__init__(str(self))

    def __str__(self) -> str:
        base = self.message
        if self.details:
            base += f" - {self.details}"
        return base


# =============================================================================
# TAXONOMY
# =============================================================================


class ConfigError(GitopsError):
    kind = "config"


class AuthError(GitopsError):
    kind = "auth"


class NetworkError(GitopsError):
    kind = "network"


class ConflictError(GitopsError):
    kind = "conflict"


class NotFoundError(GitopsError):
    kind = "not_found"


# =============================================================================
# GIT
# =============================================================================


class GitError(GitopsError):
    """Any failure raised by the git synchronizer."""


class GitAuthFailed(GitError, AuthError):
    pass


class GitNetworkError(GitError, NetworkError):
    pass


class RefNotFound(GitError, NotFoundError):
    pass


class RepositoryNotFound(GitError, NotFoundError):
    pass


class PathNotFound(GitError, NotFoundError):
    pass


class ImageNotFound(GitError, NotFoundError):
    pass


class PushRejected(GitError, ConflictError):
    pass


class ManifestError(ConfigError):
    """The manifest file could not be parsed as YAML."""


# =============================================================================
# CLUSTER
# =============================================================================


class ClusterError(GitopsError):
    """Kubernetes API failure."""


class ClusterAuthError(ClusterError, AuthError):
    pass


class ClusterUnavailable(ClusterError, NetworkError):
    pass


class ResourceNotFound(ClusterError, NotFoundError):
    """A namespace or object the operator was pointed at does not exist."""


class SecretNotFound(ResourceNotFound):
    pass


class SecretMalformed(ClusterError, ConfigError):
    pass


# =============================================================================
# REGISTRY / NOTIFICATIONS
# =============================================================================


class RegistryError(GitopsError):
    """Container registry failure."""


class RegistryAuthError(RegistryError, AuthError):
    pass


class RegistryUnavailable(RegistryError, NetworkError):
    pass


class NotifyError(GitopsError):
    """Webhook delivery failed."""
