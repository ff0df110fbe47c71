# ABOUTME: FastMCP server initialization and main entry point
# ABOUTME: Exposes reconcile/describe as MCP tools and as plain HTTP routes for probes

"""GitOps operator trigger surface: MCP tools plus /health, /reconcile and /debug."""

from __future__ import annotations

import json
import sys
from typing import TYPE_CHECKING, Any

import structlog
from mcp.server.fastmcp import Context, FastMCP
from starlette.responses import JSONResponse, PlainTextResponse

from gitops_operator.config import OperatorSettings, load_settings
from gitops_operator.models import ReconcileResult, ReconcileState
from gitops_operator.reconciler import Reconciler
from gitops_operator.utils.logging import configure_logging, set_correlation_id

if TYPE_CHECKING:
    from starlette.requests import Request

MCPContext = Context[Any, Any]
logger = structlog.get_logger(__name__)

# Global state (initialized on first use)
_settings: OperatorSettings | None = None
_reconciler: Reconciler | None = None

mcp = FastMCP("gitops-operator")


def get_settings() -> OperatorSettings:
    """Get operator settings, loading them from the environment once."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def get_reconciler() -> Reconciler:
    """Get the reconciler, connecting to the cluster on first use."""
    global _reconciler
    if _reconciler is None:
        _reconciler = Reconciler.from_settings(get_settings())
        logger.info("Reconciler initialized")
    return _reconciler


async def _reconcile_payload() -> list[dict[str, Any]]:
    try:
        reconciler = get_reconciler()
    except Exception as e:
        logger.error("Reconciler unavailable", error=str(e))
        failure = ReconcileResult(
            status="failure",
            message=f"Reconciler unavailable: {e}",
            deployment="",
            namespace="",
            state=ReconcileState.FAILED,
        )
        return [failure.model_dump(mode="json")]

    results = await reconciler.reconcile_all()
    return [r.model_dump(mode="json") for r in results]


async def _describe_payload() -> list[dict[str, Any]]:
    entries = await get_reconciler().describe()
    return [e.as_dict() for e in entries]


# =============================================================================
# MCP TOOLS
# =============================================================================


@mcp.tool()
async def reconcile(ctx: MCPContext) -> str:  # noqa: ARG001 - Required by MCP tool signature
    """
    Run one reconciliation pass over every annotated Deployment.

    Returns a JSON list with one entry per Deployment, in listing order:
    status (success/failure), message, deployment, namespace and state.
    """
    logger.info("Reconcile requested", source="mcp")
    return json.dumps(await _reconcile_payload(), indent=2)


@mcp.tool()
async def describe_deployments(ctx: MCPContext) -> str:
    """
    Show the decoded gitops configuration of every eligible Deployment.

    Read only: nothing is cloned, committed or pushed.
    """
    set_correlation_id(str(ctx.request_id) if hasattr(ctx, "request_id") else "")
    try:
        return json.dumps(await _describe_payload(), indent=2)
    except Exception as e:
        logger.error("Describe failed", error=str(e))
        return f"Failed to describe deployments: {e}"


# =============================================================================
# MCP RESOURCES
# =============================================================================


@mcp.resource("gitops://settings")
async def get_settings_resource() -> str:
    """Get the operator-wide settings that shape every pass."""
    settings = get_settings()
    return (
        "Operator Settings:\n"
        f"  Namespaces: {', '.join(settings.namespaces) or 'all'}\n"
        f"  Max concurrency: {settings.max_concurrency}\n"
        f"  Registry strict: {settings.registry_strict}\n"
        f"  Commit author: {settings.git_author_name} <{settings.git_author_email}>\n"
        f"  Retry: {settings.retry.max_attempts} attempts, "
        f"{settings.retry.initial_wait}s to {settings.retry.max_wait}s backoff"
    )


# =============================================================================
# HTTP ROUTES
# =============================================================================


@mcp.custom_route("/health", methods=["GET"])
async def health_route(_request: Request) -> PlainTextResponse:
    return PlainTextResponse("up")


@mcp.custom_route("/reconcile", methods=["GET", "POST"])
async def reconcile_route(_request: Request) -> JSONResponse:
    """Per-deployment results; always HTTP 200."""
    logger.info("Reconcile requested", source="http")
    return JSONResponse(await _reconcile_payload())


@mcp.custom_route("/debug", methods=["GET"])
async def debug_route(_request: Request) -> JSONResponse:
    try:
        return JSONResponse(await _describe_payload())
    except Exception as e:
        logger.error("Describe failed", error=str(e))
        return JSONResponse({"error": str(e)}, status_code=500)


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================


def main() -> None:
    """Run the GitOps operator."""
    settings = get_settings()
    configure_logging(level=settings.log_level, json_output=settings.json_logs)
    logger.info("GitOps operator starting", transport=settings.transport, port=settings.port)

    mcp.settings.host = settings.host
    mcp.settings.port = settings.port

    try:
        mcp.run(transport=settings.transport)
    except KeyboardInterrupt:
        logger.info("Server interrupted")
        sys.exit(0)
    except Exception as e:
        logger.error("Server error", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
