"""Pytest configuration for laneledger tests."""

import pytest
import structlog


@pytest.fixture(autouse=True)
def _reset_structlog():
    """Keep logging configuration from leaking between tests."""
    yield
    structlog.reset_defaults()


def pytest_collection_modifyitems(config, items):
    """Set per-directory timeouts: unit=1s, integration=30s (real git subprocesses)."""
    for item in items:
        if "unit" in item.keywords:
            item.add_marker(pytest.mark.timeout(1))
        elif "integration" in item.keywords:
            item.add_marker(pytest.mark.integration)
            item.add_marker(pytest.mark.timeout(30))
