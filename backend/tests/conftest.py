"""
Pytest configuration and shared fixtures.
"""

# Import fixtures
from tests.fixtures.sandbox_fixtures import (
    client,
    duel_service,
    duel_store,
    manager,
    runtime,
    settings,
)

__all__ = [
    "client",
    "duel_service",
    "duel_store",
    "manager",
    "runtime",
    "settings",
]


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
