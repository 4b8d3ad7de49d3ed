"""
Pytest configuration and shared fixtures.
"""

import sys
from pathlib import Path

import pytest

# Add backend to path
backend_path = Path(__file__).parent.parent
sys.path.insert(0, str(backend_path))

from tests.fixtures.instance_fixtures import FakeRuntime  # noqa: E402


def pytest_configure(config):
    """Configure pytest."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    """Temporary SQLite database file."""
    return tmp_path / "instancer.db"


@pytest.fixture
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()
