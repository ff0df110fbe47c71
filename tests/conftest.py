# ABOUTME: Pytest fixtures and configuration for GitOps operator tests
# ABOUTME: Provides shared fixtures for unit and integration tests

from unittest.mock import AsyncMock, MagicMock

import pytest
from factories import make_deployment

from gitops_operator.config import OperatorSettings, RetryPolicy
from gitops_operator.models import Deployment
from gitops_operator.utils.logging import AuditLogger


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Zero-wait retry policy so retry tests never sleep."""
    return RetryPolicy.immediate(max_attempts=3)


@pytest.fixture
def settings() -> OperatorSettings:
    """Settings built without reading an env file."""
    return OperatorSettings(retry=RetryPolicy.immediate(), json_logs=False)


@pytest.fixture
def audit_logger() -> MagicMock:
    """Audit logger double that records calls."""
    return MagicMock(spec=AuditLogger)


@pytest.fixture
def deployment() -> Deployment:
    """Annotated Deployment running abc000."""
    return make_deployment()


@pytest.fixture
def mock_context() -> MagicMock:
    """Create a mock MCP context."""
    ctx = MagicMock()
    ctx.request_id = "test-request-123"
    ctx.report_progress = AsyncMock()
    return ctx
