"""Pytest configuration and shared fixtures.

Usage Guide:
- For scheduler tests: build configs with tests.helpers.fast_config() so no
  real pacing delays apply
- For rate window tests: drive time with the ``clock`` fixture
- For concurrency assertions: wrap work in a tests.helpers.ConcurrencyTracker
"""

from __future__ import annotations

from collections.abc import Iterator

import pytest

from scrape_scheduler.config import get_settings
from tests.helpers import FakeClock


# -----------------------------------------------------------------------------
# Settings Isolation
# -----------------------------------------------------------------------------
@pytest.fixture(autouse=True)
def _clear_settings_cache() -> Iterator[None]:
    """Make every test read settings fresh from its own environment."""
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


# -----------------------------------------------------------------------------
# Clock
# -----------------------------------------------------------------------------
@pytest.fixture
def clock() -> FakeClock:
    """Manually advanced clock starting at t=1000s."""
    return FakeClock()
