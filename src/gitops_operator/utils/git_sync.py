# ABOUTME: Git access for the reconciler: remote head lookup and manifest update commits
# ABOUTME: GitPython in worker threads, SSH keys in private temp dirs, stderr mapped to errors

"""
Git synchronizer.

Two operations touch a remote:

    latest_revision()   git ls-remote for one branch head. Read only.
    apply_update()      shallow clone, patch one manifest, commit, push.

Both run GitPython in a worker thread. The SSH key for an operation is
written with mode 0600 into a temporary directory that only lives as long
as the operation, and handed to ssh through GIT_SSH_COMMAND. Host keys are
always checked strictly; an unknown host is a GitAuthFailed, never a prompt.

Git reports failures as text on stderr. classify_git_error() turns that text
into the error taxonomy so the orchestrator can tell a rejected push from a
revoked key from a flaky network. Only GitNetworkError is retried.
"""

from __future__ import annotations

import asyncio
import os
import shlex
import shutil
import tempfile
from contextlib import contextmanager
from pathlib import Path
from typing import TYPE_CHECKING

import structlog
from git import Actor, Repo
from git.cmd import Git
from git.exc import GitCommandError
from git.remote import PushInfo

from gitops_operator.config import RetryPolicy
from gitops_operator.errors import (
    GitAuthFailed,
    GitError,
    GitNetworkError,
    PathNotFound,
    PushRejected,
    RefNotFound,
    RepositoryNotFound,
)
from gitops_operator.models import TagType
from gitops_operator.utils.manifest import patch_image_tag

if TYPE_CHECKING:
    from collections.abc import Iterator

    from gitops_operator.models import Deployment

logger = structlog.get_logger(__name__)

_PUSH_FAILED = (
    PushInfo.ERROR | PushInfo.REJECTED | PushInfo.REMOTE_REJECTED | PushInfo.REMOTE_FAILURE
)

_AUTH_MARKERS = (
    "permission denied",
    "host key verification failed",
    "authentication failed",
    "could not read username",
)
_REPO_MARKERS = ("repository not found", "does not appear to be a git repository")
_REF_MARKERS = ("not found in upstream", "couldn't find remote ref")
_REJECT_MARKERS = (
    "[rejected]",
    "[remote rejected]",
    "non-fast-forward",
    "fetch first",
    "failed to push",
    "hook declined",
)


def classify_git_error(e: GitCommandError, what: str) -> GitError:
    """Map a failed git command onto the error taxonomy."""
    stderr = str(e.stderr or "").strip().removeprefix("stderr:").strip().strip("'").strip()
    text = f"{stderr}\n{e}".lower()
    details = stderr or str(e)

    if any(marker in text for marker in _AUTH_MARKERS):
        return GitAuthFailed(f"Authentication failed while trying to {what}", details)
    if any(marker in text for marker in _REPO_MARKERS):
        return RepositoryNotFound(f"Repository not found while trying to {what}", details)
    if any(marker in text for marker in _REF_MARKERS):
        return RefNotFound(f"Branch not found while trying to {what}", details)
    if any(marker in text for marker in _REJECT_MARKERS):
        return PushRejected(f"Push rejected while trying to {what}", details)
    return GitNetworkError(f"Git failed to {what}", details)


class GitSynchronizer:
    """
    Reads remote heads and writes manifest updates.

    Holds no state between calls; every apply_update() works in a fresh
    clone. Callers serialize updates to one repository with RepositoryLocks.
    """

    def __init__(
        self,
        retry_policy: RetryPolicy | None = None,
        author_name: str = "GitOps Operator",
        author_email: str = "gitops-operator@localhost",
        known_hosts_file: Path | None = None,
        timeout: float = 120.0,
    ) -> None:
        self._retry = retry_policy or RetryPolicy()
        self._author = Actor(author_name, author_email)
        self._known_hosts_file = known_hosts_file
        self._timeout = timeout

    # =========================================================================
    # SSH
    # =========================================================================

    @contextmanager
    def _environment(self, ssh_key: str | None) -> Iterator[dict[str, str]]:
        env = {"GIT_TERMINAL_PROMPT": "0"}
        if ssh_key is None:
            yield env
            return

        with tempfile.TemporaryDirectory(prefix="gitops-ssh-") as tmp:
            key_path = Path(tmp) / "id_key"
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(ssh_key if ssh_key.endswith("\n") else ssh_key + "\n")

            command = [
                "ssh",
                "-i", str(key_path),
                "-o", "IdentitiesOnly=yes",
                "-o", "BatchMode=yes",
                "-o", "StrictHostKeyChecking=yes",
                "-o", f"ConnectTimeout={int(self._timeout)}",
            ]  # fmt: skip
            if self._known_hosts_file:
                command += ["-o", f"UserKnownHostsFile={self._known_hosts_file}"]
            env["GIT_SSH_COMMAND"] = shlex.join(command)
            yield env

    # =========================================================================
    # READ
    # =========================================================================

    async def latest_revision(
        self,
        repository: str,
        branch: str,
        tag_type: TagType = TagType.LONG,
        ssh_key: str | None = None,
    ) -> str:
        """
        Head of branch on the remote, rendered as an image tag.

        Raises:
            RefNotFound: The branch does not exist.
            GitAuthFailed, RepositoryNotFound, GitNetworkError: see module doc.
        """
        sha = await asyncio.to_thread(self._ls_remote, repository, branch, ssh_key)
        return tag_type.render(sha)

    def _ls_remote(self, repository: str, branch: str, ssh_key: str | None) -> str:
        ref = f"refs/heads/{branch}"
        with self._environment(ssh_key) as env:
            g = Git()
            for attempt in self._retry.retrying(GitNetworkError):
                with attempt:
                    try:
                        with g.custom_environment(**env):
                            output = g.ls_remote(
                                repository, ref, kill_after_timeout=self._timeout
                            )
                    except GitCommandError as e:
                        raise classify_git_error(e, f"list {ref}") from e

        for line in output.splitlines():
            sha, _, name = line.partition("\t")
            if name.strip() == ref:
                return sha.strip()
        raise RefNotFound(f"Branch {branch!r} not found", repository)

    @staticmethod
    def current_revision(deployment: Deployment, image_name: str) -> str:
        """Tag the cluster is running for image_name."""
        return deployment.current_revision(image_name)

    # =========================================================================
    # WRITE
    # =========================================================================

    async def apply_update(
        self,
        repository: str,
        branch: str,
        deployment_path: str,
        image_name: str,
        revision: str,
        ssh_key: str | None = None,
    ) -> str | None:
        """
        Point the manifest at revision and push the commit.

        Args:
            repository: Manifest repository URL.
            branch: Branch to commit on.
            deployment_path: Manifest path relative to the repository root.
            image_name: Image whose tag is rewritten.
            revision: New tag.
            ssh_key: Private key, or None for transports that need none.

        Returns:
            The new commit SHA, or None when the manifest already pins
            revision and nothing was committed.

        Raises:
            PathNotFound: deployment_path is missing or escapes the checkout.
            ImageNotFound: The manifest has no reference to image_name.
            ManifestError: The manifest is not valid YAML.
            PushRejected: The remote refused the push.
        """
        return await asyncio.to_thread(
            self._apply_update,
            repository,
            branch,
            deployment_path,
            image_name,
            revision,
            ssh_key,
        )

    def _apply_update(
        self,
        repository: str,
        branch: str,
        deployment_path: str,
        image_name: str,
        revision: str,
        ssh_key: str | None,
    ) -> str | None:
        with (
            self._environment(ssh_key) as env,
            tempfile.TemporaryDirectory(prefix="gitops-checkout-") as tmp,
        ):
            workdir = Path(tmp) / "repo"
            repo = self._clone(repository, branch, workdir, env)
            try:
                target = self._manifest_path(workdir, deployment_path)
                document = target.read_bytes().decode("utf-8")
                patched, changed = patch_image_tag(document, image_name, revision)
                if not changed:
                    logger.info(
                        "Manifest already at revision",
                        repository=repository,
                        path=deployment_path,
                        revision=revision,
                    )
                    return None

                target.write_bytes(patched.encode("utf-8"))
                repo.index.add([str(target.relative_to(workdir.resolve()))])
                commit = repo.index.commit(
                    f"chore(refs): update {image_name} to {revision}",
                    author=self._author,
                    committer=self._author,
                )
                self._push(repo, repository, branch, env)
            finally:
                repo.close()

        logger.info(
            "Pushed manifest update",
            repository=repository,
            branch=branch,
            path=deployment_path,
            revision=revision,
            commit=commit.hexsha,
        )
        return commit.hexsha

    def _clone(self, repository: str, branch: str, workdir: Path, env: dict[str, str]) -> Repo:
        for attempt in self._retry.retrying(GitNetworkError):
            with attempt:
                if workdir.exists():
                    # Leftovers of a failed attempt would make clone refuse.
                    shutil.rmtree(workdir)
                try:
                    return Repo.clone_from(
                        repository,
                        workdir,
                        env=env,
                        branch=branch,
                        depth=1,
                        single_branch=True,
                    )
                except GitCommandError as e:
                    raise classify_git_error(e, f"clone {branch}") from e
        raise AssertionError("unreachable")  # pragma: no cover

    @staticmethod
    def _manifest_path(workdir: Path, deployment_path: str) -> Path:
        root = workdir.resolve()
        target = (root / deployment_path).resolve()
        if not target.is_relative_to(root) or target == root:
            raise PathNotFound(f"Manifest path {deployment_path!r} is outside the repository")
        if not target.is_file():
            raise PathNotFound(f"Manifest {deployment_path!r} not found in repository")
        return target

    def _push(self, repo: Repo, repository: str, branch: str, env: dict[str, str]) -> None:
        refspec = f"HEAD:refs/heads/{branch}"
        for attempt in self._retry.retrying(GitNetworkError):
            with attempt:
                try:
                    with repo.git.custom_environment(**env):
                        infos = repo.remote("origin").push(
                            refspec, kill_after_timeout=self._timeout
                        )
                        for info in infos:
                            if info.flags & _PUSH_FAILED:
                                raise PushRejected(
                                    f"Push to {branch} rejected by {repository}",
                                    info.summary.strip(),
                                )
                        infos.raise_if_error()
                except GitCommandError as e:
                    raise classify_git_error(e, f"push to {branch}") from e

