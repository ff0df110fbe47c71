# ABOUTME: Per-repository mutual exclusion for manifest updates
# ABOUTME: Keyed asyncio locks on normalized remote URLs, created lazily and never removed

"""Per-repository locks.

Several Deployments may share one manifest repository. Two concurrent
clone/patch/commit/push sequences against it would race: the second push is
rejected, or worse, one update is silently lost. RepositoryLocks serializes
updates per repository identity while letting different repositories proceed
in parallel.
"""

from __future__ import annotations

import asyncio
import re
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = structlog.get_logger(__name__)

_SCP_LIKE = re.compile(r"^(?:[^@/]+@)?(?P<host>[^:/]+):(?P<path>(?!//).+)$")


def normalize_repository(url: str) -> str:
    """
    Reduce a remote URL to a stable identity.

    These all map to "github.com/org/manifests":

        git@github.com:org/manifests.git
        ssh://git@github.com/org/manifests
        ssh://git@GitHub.com:22/org/manifests.git/

    Ports other than 22 are kept, since they name a different server.
    Local paths and file:// URLs map to their path.
    """
    url = url.strip()
    host = ""
    if "://" in url:
        parts = urlsplit(url)
        host = (parts.hostname or "").lower()
        if parts.port and parts.port != 22:
            host = f"{host}:{parts.port}"
        path = parts.path
    elif match := _SCP_LIKE.match(url):
        host = match.group("host").lower()
        path = match.group("path")
    else:
        path = url

    path = path.rstrip("/")
    path = path.removesuffix(".git").rstrip("/")
    if host:
        return f"{host}/{path.lstrip('/')}"
    return path


class RepositoryLocks:
    """Keyed mutex map: one asyncio.Lock per normalized repository identity."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, repository: str) -> asyncio.Lock:
        identity = normalize_repository(repository)
        # No await between lookup and insert, so this is atomic on the loop.
        lock = self._locks.get(identity)
        if lock is None:
            lock = self._locks[identity] = asyncio.Lock()
        return lock

    @asynccontextmanager
    async def acquire(self, repository: str) -> AsyncIterator[str]:
        """
        Hold the lock for repository for the duration of the block.

        Blocks until the lock is free. Released on every exit path,
        including exceptions and task cancellation.

        Yields:
            The normalized identity that was locked.
        """
        identity = normalize_repository(repository)
        lock = self.lock_for(repository)
        if lock.locked():
            logger.debug("Waiting for repository lock", repository=identity)
        async with lock:
            yield identity
