# ABOUTME: Structured logging with pass-level correlation IDs for the reconciler
# ABOUTME: Configures structlog and records an audit trail of manifest mutations

"""
Structured logging with correlation IDs and an audit trail.

=============================================================================
WHAT IS THIS FILE?
=============================================================================

1. STRUCTURED LOGGING: structlog with JSON output in production and the
   console renderer for local runs.

2. CORRELATION IDs: every reconciliation pass gets one id. The pass fans out
   into one asyncio task per Deployment; tasks copy the current context when
   they are created, so every log line from every pipeline in the pass
   carries the same id:

       {"correlation_id": "a1b2c3d4", "event": "Reconciliation started"}
       {"correlation_id": "a1b2c3d4", "event": "Deployment patched", "deployment": "web"}
       {"correlation_id": "a1b2c3d4", "event": "Deployment up to date", "deployment": "api"}

   Filter a single pass with: jq 'select(.correlation_id == "a1b2c3d4")'

3. AUDIT LOGGING: the only durable side effect of this service is a commit
   on a manifest repository. AuditLogger writes one record for every
   attempt to make one, whatever its outcome.
"""

from __future__ import annotations

import json
import logging
import uuid
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

import structlog

if TYPE_CHECKING:
    from collections.abc import MutableMapping
    from pathlib import Path


# =============================================================================
# CORRELATION ID MANAGEMENT
# =============================================================================

correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")


def new_correlation_id() -> str:
    """Start a new pass: generate, store and return a fresh 8-character id."""
    cid = str(uuid.uuid4())[:8]
    correlation_id.set(cid)
    return cid


def get_correlation_id() -> str:
    """
    Get the current correlation ID, generating one if none is set.

    Code that runs outside a pass (startup, the debug surface) still gets an
    id, so its log lines remain groupable.
    """
    cid = correlation_id.get()
    if not cid:
        cid = new_correlation_id()
    return cid


def set_correlation_id(cid: str) -> None:
    """Set correlation ID for the current context, e.g. from a request id."""
    correlation_id.set(cid)


def add_correlation_id(
    logger: structlog.types.WrappedLogger,  # noqa: ARG001 - Required by structlog Processor API
    method_name: str,  # noqa: ARG001 - Required by structlog Processor API
    event_dict: MutableMapping[str, Any],
) -> MutableMapping[str, Any]:
    """structlog processor that stamps every event with the correlation ID."""
    event_dict["correlation_id"] = get_correlation_id()
    return event_dict


# =============================================================================
# LOGGING CONFIGURATION
# =============================================================================


def configure_logging(
    level: str = "INFO",
    json_output: bool = True,
) -> None:
    """
    Configure structured logging. Call once at startup.

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL.
        json_output: JSON lines for log aggregation; False for the coloured
            console renderer.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_correlation_id,
    ]

    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, level.upper(), logging.INFO)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


# =============================================================================
# AUDIT LOGGER
# =============================================================================


class AuditLogger:
    """
    Audit trail of manifest mutations.

    Each record answers: in which pass, for which Deployment, what was
    attempted against which repository, and what happened.

        {"timestamp": "2025-03-02T10:30:00+00:00", "correlation_id": "a1b2c3d4",
         "action": "apply_update", "target": "default/web", "result": "committed",
         "details": {"repository": "git@github.com:org/manifests.git",
                     "revision": "abc123", "commit": "9f8e7d..."}}

    Results used: committed, up_to_date, blocked, error, success (reads).
    """

    def __init__(self, log_path: Path | None = None) -> None:
        """
        Args:
            log_path: Append JSON lines to this file, or None to emit the
                records through structlog on stdout.
        """
        self._log_path = log_path
        self._logger = structlog.get_logger("audit")

    def log(
        self,
        action: str,
        target: str,
        result: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Write one audit record."""
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "correlation_id": get_correlation_id(),
            "action": action,
            "target": target,
            "result": result,
        }
        if details:
            entry["details"] = details

        if self._log_path:
            with self._log_path.open("a") as f:
                f.write(json.dumps(entry) + "\n")
        else:
            self._logger.info(
                "audit",
                action=action,
                target=target,
                result=result,
                details=details,
            )

    def log_read(self, action: str, target: str) -> None:
        """Record a read-only operation such as the debug listing."""
        self.log(action, target, "success")

    def log_commit(self, target: str, repository: str, revision: str, commit: str) -> None:
        """Record a manifest commit that reached the remote."""
        self.log(
            "apply_update",
            target,
            "committed",
            {"repository": repository, "revision": revision, "commit": commit},
        )

    def log_up_to_date(self, target: str, repository: str, revision: str) -> None:
        """Record an update that found the manifest already at revision."""
        self.log(
            "apply_update",
            target,
            "up_to_date",
            {"repository": repository, "revision": revision},
        )

    def log_blocked(self, action: str, target: str, reason: str) -> None:
        """Record an update held back by a gate, e.g. the registry check."""
        self.log(action, target, "blocked", {"reason": reason})

    def log_error(self, action: str, target: str, error: str) -> None:
        """Record a failed mutation attempt."""
        self.log(action, target, "error", {"error": error})
