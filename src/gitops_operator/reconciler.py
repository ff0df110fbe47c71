# ABOUTME: Reconciliation orchestrator: one pass over every annotated Deployment
# ABOUTME: Runs decode, compare, registry gate, locked update and notify per deployment

"""
Reconciliation orchestrator.

=============================================================================
ONE PASS
=============================================================================

    reconcile_all()
        list Deployments (cluster API)
        for each Deployment, concurrently, bounded by max_concurrency:
            decode annotations          -> skip? report and stop
            CHECKING    latest app revision vs. running image tag
                                        -> equal? UP_TO_DATE, stop
            registry gate               -> absent? defer, stop
            UPDATING    apply_update() under the manifest repository lock
            NOTIFYING   best-effort webhook
            DONE / FAILED
        results, in listing order

Every pipeline is isolated: any exception it raises becomes a Failure entry
for that Deployment alone. The pass itself only fails as a whole if the
Deployments cannot be listed, and even then it returns a single Failure
entry rather than raising.
"""

from __future__ import annotations

import asyncio
import contextlib
from typing import TYPE_CHECKING

import structlog

from gitops_operator.annotations import decode_annotations
from gitops_operator.errors import GitopsError
from gitops_operator.models import (
    DebugEntry,
    DeploymentConfig,
    ReconcileResult,
    ReconcileState,
    SkipReason,
)
from gitops_operator.utils.cluster import ClusterClient
from gitops_operator.utils.git_sync import GitSynchronizer
from gitops_operator.utils.locks import RepositoryLocks
from gitops_operator.utils.logging import AuditLogger, new_correlation_id
from gitops_operator.utils.notifications import Notification, Notifier
from gitops_operator.utils.registry import ImageStatus, RegistryResolver

if TYPE_CHECKING:
    from gitops_operator.config import OperatorSettings
    from gitops_operator.models import Deployment

logger = structlog.get_logger(__name__)


def _describe_error(e: Exception) -> str:
    kind = e.kind if isinstance(e, GitopsError) else "error"
    return f"{kind}: {e}"


def _with_warning(message: str, warning: str | None) -> str:
    return f"{message} (warning: {warning})" if warning else message


class Reconciler:
    """
    Fans one trigger out over all Deployments and aggregates the results.

    Collaborators are injected so tests can replace any of them with fakes.
    Reconciler.from_settings() wires the real ones.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        git: GitSynchronizer,
        registry: RegistryResolver,
        notifier: Notifier,
        locks: RepositoryLocks | None = None,
        audit: AuditLogger | None = None,
        namespaces: list[str] | None = None,
        max_concurrency: int = 8,
        registry_strict: bool = False,
    ) -> None:
        self._cluster = cluster
        self._git = git
        self._registry = registry
        self._notifier = notifier
        self._locks = locks or RepositoryLocks()
        self._audit = audit or AuditLogger()
        self._namespaces = namespaces or []
        self._max_concurrency = max_concurrency
        self._registry_strict = registry_strict

    @classmethod
    def from_settings(cls, settings: OperatorSettings) -> Reconciler:
        cluster = ClusterClient.from_settings(settings)
        return cls(
            cluster=cluster,
            git=GitSynchronizer(
                retry_policy=settings.retry,
                author_name=settings.git_author_name,
                author_email=settings.git_author_email,
                known_hosts_file=settings.known_hosts_file,
                timeout=settings.git_timeout,
            ),
            registry=RegistryResolver(
                cluster,
                default_secret_name=settings.default_registry_secret_name,
                default_secret_namespace=settings.default_registry_secret_namespace,
                timeout=settings.http_timeout,
                retry_policy=settings.retry,
            ),
            notifier=Notifier(
                cluster,
                timeout=settings.http_timeout,
                default_namespace=settings.default_notifications_namespace,
            ),
            audit=AuditLogger(settings.audit_log),
            namespaces=settings.namespaces,
            max_concurrency=settings.max_concurrency,
            registry_strict=settings.registry_strict,
        )

    # =========================================================================
    # PASS
    # =========================================================================

    async def reconcile_all(self) -> list[ReconcileResult]:
        """
        Run one reconciliation pass.

        Returns:
            One result per listed Deployment, in listing order.
        """
        cid = new_correlation_id()
        log = logger.bind(pass_id=cid)
        log.info("Reconciliation started", namespaces=self._namespaces or "all")

        try:
            deployments = await self._cluster.list_deployments(self._namespaces)
        except Exception as e:
            log.error("Failed to list deployments", error=str(e))
            return [
                ReconcileResult(
                    status="failure",
                    message=f"Failed to list deployments: {_describe_error(e)}",
                    deployment="",
                    namespace="",
                    state=ReconcileState.FAILED,
                )
            ]

        semaphore = asyncio.Semaphore(self._max_concurrency)

        async def guarded(deployment: Deployment) -> ReconcileResult:
            async with semaphore:
                try:
                    return await self.reconcile_deployment(deployment)
                except Exception as e:
                    logger.exception(
                        "Deployment pipeline failed",
                        deployment=deployment.name,
                        namespace=deployment.namespace,
                    )
                    return ReconcileResult.failure(
                        f"Deployment: {deployment.name} failed: {_describe_error(e)}",
                        deployment,
                    )

        results = await asyncio.gather(*(guarded(d) for d in deployments))

        failed = sum(1 for r in results if not r.ok)
        log.info("Reconciliation finished", deployments=len(results), failed=failed)
        return list(results)

    # =========================================================================
    # PIPELINE
    # =========================================================================

    async def reconcile_deployment(self, deployment: Deployment) -> ReconcileResult:
        """
        Run the pipeline for one Deployment.

        Raises whatever the collaborators raise before the update step;
        reconcile_all() turns that into a Failure.
        """
        name = deployment.name
        log = logger.bind(deployment=name, namespace=deployment.namespace)

        decoded = decode_annotations(deployment.annotations, deployment.namespace)
        if isinstance(decoded, SkipReason):
            if decoded.malformed:
                log.warning("Invalid gitops annotations", reason=str(decoded))
                return ReconcileResult.failure(
                    f"Deployment: {name} has invalid gitops annotations: {decoded}", deployment
                )
            log.debug("Deployment skipped", reason=str(decoded))
            return ReconcileResult.success(f"Deployment: {name} skipped: {decoded}", deployment)

        config = decoded
        config.state = ReconcileState.CHECKING
        ssh_key = await self._cluster.get_ssh_key(config.ssh_key_name, config.ssh_key_namespace)
        latest = await self._git.latest_revision(
            config.app_repository, config.observe_branch, config.tag_type, ssh_key
        )
        current = self._git.current_revision(deployment, config.image_name)
        log = log.bind(current=current, latest=latest)

        if current == latest:
            config.state = ReconcileState.UP_TO_DATE
            log.info("Deployment up to date")
            return ReconcileResult.success(
                f"Deployment: {name} is up to date, proceeding to next deployment...",
                deployment,
                state=config.state,
            )

        target = f"{deployment.namespace}/{name}"
        check = await self._registry.check(config, latest)
        if check.status is ImageStatus.ABSENT:
            log.info("Image not yet published, update deferred", image=config.image_name)
            self._audit.log_blocked("apply_update", target, f"image {latest} not in registry")
            return ReconcileResult.success(
                f"Deployment: {name} update to version: {latest} deferred, "
                f"image {config.image_name}:{latest} is not published yet",
                deployment,
                state=ReconcileState.UP_TO_DATE,
            )
        if check.status is ImageStatus.UNVERIFIED and self._registry_strict:
            self._audit.log_blocked("apply_update", target, check.warning or "unverified")
            return ReconcileResult.failure(
                f"Deployment: {name} update to version: {latest} blocked: {check.warning}",
                deployment,
            )

        return await self._update(deployment, config, latest, ssh_key, check.warning)

    async def _update(
        self,
        deployment: Deployment,
        config: DeploymentConfig,
        revision: str,
        ssh_key: str,
        warning: str | None,
    ) -> ReconcileResult:
        name = deployment.name
        target = f"{deployment.namespace}/{name}"
        log = logger.bind(deployment=name, namespace=deployment.namespace, revision=revision)

        config.state = ReconcileState.UPDATING
        try:
            commit = await self._apply_locked(config, revision, ssh_key)
        except Exception as e:
            log.error("Manifest update failed", error=str(e))
            self._audit.log_error("apply_update", target, str(e))
            await self._notify(
                config,
                Notification.failed(name, deployment.namespace, revision, _describe_error(e)),
            )
            config.state = ReconcileState.FAILED
            return ReconcileResult.failure(
                _with_warning(
                    f"Deployment: {name} failed to patch to version: {revision}: "
                    f"{_describe_error(e)}",
                    warning,
                ),
                deployment,
            )

        if commit is None:
            self._audit.log_up_to_date(target, config.manifest_repository, revision)
            config.state = ReconcileState.UP_TO_DATE
            return ReconcileResult.success(
                _with_warning(
                    f"Deployment: {name} manifest already at version: {revision}, "
                    "waiting for rollout",
                    warning,
                ),
                deployment,
                state=config.state,
            )

        self._audit.log_commit(target, config.manifest_repository, revision, commit)
        log.info("Deployment patched", commit=commit)
        await self._notify(config, Notification.updated(name, deployment.namespace, revision))

        config.state = ReconcileState.DONE
        message = f"Deployment: {name} patched successfully to version: {revision}"
        return ReconcileResult.success(_with_warning(message, warning), deployment)

    async def _apply_locked(
        self, config: DeploymentConfig, revision: str, ssh_key: str
    ) -> str | None:
        """
        apply_update() under the manifest repository lock.

        Git work runs in a worker thread that cancellation cannot stop. If the
        pass is cancelled the lock stays held until that update has finished,
        then the cancellation propagates.
        """
        async with self._locks.acquire(config.manifest_repository):
            task = asyncio.create_task(
                self._git.apply_update(
                    config.manifest_repository,
                    config.observe_branch,
                    config.deployment_path,
                    config.image_name,
                    revision,
                    ssh_key,
                )
            )
            try:
                return await asyncio.shield(task)
            except asyncio.CancelledError:
                logger.warning(
                    "Pass cancelled during manifest update, waiting for git to finish",
                    repository=config.manifest_repository,
                )
                while not task.done():
                    with contextlib.suppress(asyncio.CancelledError):
                        await asyncio.wait({task})
                if not task.cancelled() and task.exception() is not None:
                    logger.error(
                        "Manifest update failed after cancellation", error=str(task.exception())
                    )
                raise

    async def _notify(self, config: DeploymentConfig, payload: Notification) -> None:
        if not config.notifications_secret_name:
            return
        config.state = ReconcileState.NOTIFYING
        await self._notifier.notify(
            config.notifications_secret_name,
            config.notifications_secret_namespace,
            payload,
        )

    # =========================================================================
    # DEBUG
    # =========================================================================

    async def describe(self) -> list[DebugEntry]:
        """Decoded config and raw annotations of every eligible Deployment. Read only."""
        deployments = await self._cluster.list_deployments(self._namespaces)
        entries = []
        for deployment in deployments:
            decoded = decode_annotations(deployment.annotations, deployment.namespace)
            if isinstance(decoded, SkipReason):
                continue
            image = deployment.image_for(decoded.image_name)
            entries.append(
                DebugEntry(
                    name=deployment.name,
                    namespace=deployment.namespace,
                    container=str(image) if image else "",
                    version=deployment.current_revision(decoded.image_name),
                    annotations=deployment.annotations,
                    config=decoded,
                )
            )
        self._audit.log_read("describe_deployments", "cluster")
        return entries
