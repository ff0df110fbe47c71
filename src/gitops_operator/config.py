# ABOUTME: Configuration management for the GitOps reconciler
# ABOUTME: Handles environment variables, retry policy, and git/registry defaults

"""
Configuration management using pydantic-settings.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

Process-wide settings for the reconciler. Per-deployment configuration does
NOT live here: it comes from Deployment annotations on every pass (see
annotations.py). This module only holds what an operator sets once for the
whole service:

1. WHERE to look (namespaces, kubeconfig)
2. HOW to talk to git, registries and webhooks (timeouts, commit identity,
   known_hosts)
3. HOW HARD to retry transient failures (RetryPolicy)
4. HOW to log and where to serve the trigger surface

=============================================================================
ENVIRONMENT VARIABLE MAPPING
=============================================================================

All settings use the GITOPS_ prefix; nested models use a double underscore:

    GITOPS_NAMESPACES='["apps","web"]'  -> only list Deployments there
    GITOPS_MAX_CONCURRENCY=8            -> pipelines running at once
    GITOPS_REGISTRY_STRICT=true         -> unverifiable image = failure
    GITOPS_KNOWN_HOSTS_FILE=/etc/ssh/ssh_known_hosts
    GITOPS_RETRY__MAX_ATTEMPTS=5        -> nested RetryPolicy field
    GITOPS_LOG_LEVEL=DEBUG

=============================================================================
RETRY POLICY
=============================================================================

Network calls (git transport, registry, Kubernetes API) are retried through
one explicit RetryPolicy object that every component receives in its
constructor. Tests inject RetryPolicy.immediate() so nothing ever sleeps.
"""

from __future__ import annotations

import os
from pathlib import Path  # noqa: TC003 - Required at runtime for Pydantic
from typing import Annotated, Literal

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict
from tenacity import (
    AsyncRetrying,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

# =============================================================================
# RETRY POLICY
# =============================================================================


class RetryPolicy(BaseModel):
    """
    Bounded exponential backoff for transient failures.

    The policy is data, not behaviour baked into a decorator, so the same
    object drives the git worker threads (sync Retrying) and the httpx
    clients (AsyncRetrying):

        async for attempt in policy.async_retrying(RegistryUnavailable):
            with attempt:
                await client.head(url)

    With the defaults: attempt 1, wait 1s, attempt 2, wait 2s, attempt 3,
    then the last exception is re-raised unchanged.
    """

    model_config = {"extra": "ignore"}

    max_attempts: int = Field(default=3, ge=1, description="Total attempts including the first")
    initial_wait: float = Field(default=1.0, ge=0, description="Minimum wait between attempts")
    max_wait: float = Field(default=10.0, ge=0, description="Maximum wait between attempts")
    multiplier: float = Field(default=1.0, ge=0, description="Exponential backoff multiplier")

    @classmethod
    def immediate(cls, max_attempts: int = 3) -> RetryPolicy:
        """Zero-wait policy, used by tests."""
        return cls(max_attempts=max_attempts, initial_wait=0, max_wait=0, multiplier=0)

    def _kwargs(self, retry_on: type[BaseException] | tuple[type[BaseException], ...]) -> dict:
        return {
            "retry": retry_if_exception_type(retry_on),
            "stop": stop_after_attempt(self.max_attempts),
            "wait": wait_exponential(
                multiplier=self.multiplier, min=self.initial_wait, max=self.max_wait
            ),
            "reraise": True,
        }

    def retrying(
        self, retry_on: type[BaseException] | tuple[type[BaseException], ...]
    ) -> Retrying:
        """Blocking retry controller for code running in worker threads."""
        return Retrying(**self._kwargs(retry_on))

    def async_retrying(
        self, retry_on: type[BaseException] | tuple[type[BaseException], ...]
    ) -> AsyncRetrying:
        """Async retry controller for coroutines."""
        return AsyncRetrying(**self._kwargs(retry_on))


# =============================================================================
# OPERATOR SETTINGS
# =============================================================================


class OperatorSettings(BaseSettings):
    """
    Main service configuration.

    USAGE:
    ------
        settings = load_settings()       # Reads GITOPS_* from environment
        settings.retry.max_attempts      # Nested retry policy
        settings.namespaces or "all"     # Listing scope
    """

    model_config = SettingsConfigDict(
        env_prefix="GITOPS_",
        env_nested_delimiter="__",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # CLUSTER
    # -------------------------------------------------------------------------

    namespaces: list[str] = Field(
        default_factory=list,
        description="Namespaces to list Deployments from; empty means all namespaces",
    )

    kubeconfig: Path | None = Field(default=None, description="Explicit kubeconfig file")
    kube_context: str | None = Field(default=None, description="Context inside the kubeconfig")

    max_concurrency: int = Field(
        default=8,
        ge=1,
        description="Upper bound on per-deployment pipelines running at once",
    )
    # Distinct manifest repositories still update in parallel up to this bound;
    # the same repository is always serialized by RepositoryLocks.

    # -------------------------------------------------------------------------
    # GIT
    # -------------------------------------------------------------------------

    git_author_name: str = Field(default="GitOps Operator", description="Commit author name")
    git_author_email: str = Field(
        default="gitops-operator@localhost", description="Commit author email"
    )

    known_hosts_file: Path | None = Field(
        default=None,
        description="known_hosts file for ssh host verification",
    )
    # StrictHostKeyChecking is always on. A host missing from known_hosts is
    # a failed clone, never an interactive prompt.

    git_timeout: float = Field(default=120.0, gt=0, description="Timeout for one git command")

    # -------------------------------------------------------------------------
    # REGISTRY AND NOTIFICATIONS
    # -------------------------------------------------------------------------

    registry_strict: bool = Field(
        default=False,
        description="Fail the deployment when the registry check cannot be completed",
    )

    default_registry_secret_name: str = Field(default="regcred")
    default_registry_secret_namespace: str = Field(default="gitops-operator")
    default_notifications_namespace: str = Field(default="gitops-operator")

    http_timeout: float = Field(default=30.0, gt=0, description="Registry and webhook timeout")

    retry: RetryPolicy = Field(default_factory=RetryPolicy)

    # -------------------------------------------------------------------------
    # OBSERVABILITY AND SERVING
    # -------------------------------------------------------------------------

    log_level: Annotated[str, Field(pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")] = Field(
        default="INFO",
        description="Logging level",
    )
    json_logs: bool = Field(default=True, description="Render logs as JSON lines")
    audit_log: Path | None = Field(default=None, description="Path to audit log file")

    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)
    transport: Literal["stdio", "sse", "streamable-http"] = Field(default="streamable-http")


# =============================================================================
# SETTINGS LOADER
# =============================================================================


def load_settings() -> OperatorSettings:
    """
    Load settings from environment with validation.

    If GITOPS_OPERATOR_ENV_FILE is set, variables are also read from that
    file, which is handy for local development against a kind cluster.

    Raises:
        pydantic.ValidationError: If configuration is invalid.
    """
    return OperatorSettings(
        _env_file=os.environ.get("GITOPS_OPERATOR_ENV_FILE"),
    )
