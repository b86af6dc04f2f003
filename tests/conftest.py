"""
Pytest configuration and fixtures for Multiverse tests.
"""

import sys
from pathlib import Path

import pytest

# Add src directory to path so imports work
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

from multiverse.configuration.relay_settings import RelaySettings  # noqa: E402

from fakes import FakeTransport  # noqa: E402


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def settings() -> RelaySettings:
    """Relay settings with timers shortened for tests."""
    return RelaySettings(
        {
            "superusers": [900],
            "convergence_jitter_seconds": 0,
            "reconcile_initial_delay_seconds": 0,
            "announce_on_start": False,
            "history_capacity": 50,
        }
    )
