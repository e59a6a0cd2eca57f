"""Pytest configuration for all tests."""

import pytest

WORKFLOW_ENV_VARS = (
    "WORKFLOW_DATABASE_URL",
    "WORKFLOW_DB_MIN_POOL_SIZE",
    "WORKFLOW_DB_MAX_POOL_SIZE",
    "WORKFLOW_DB_COMMAND_TIMEOUT_SECONDS",
    "WORKFLOW_AUDIT_SINKS",
    "WORKFLOW_AUDIT_TIMEOUT_SECONDS",
    "WORKFLOW_LOG_LEVEL",
    "WORKFLOW_HOST",
    "WORKFLOW_PORT",
)


@pytest.fixture
def clean_workflow_env(monkeypatch):
    """Remove all WORKFLOW_* settings so tests start from defaults."""
    for name in WORKFLOW_ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch
