"""
Pytest configuration for intercom-mirror tests.

Test Tier System:
- fast: Pure unit tests, all I/O mocked
- medium: Filesystem ops, full refresh/facade flows against fake sessions
- slow: Real Intercom API calls

Run tiers:
- pytest                          # Fast + Medium (default, addopts -m "not slow")
- pytest -m medium                # Medium only
- pytest -m fast                  # Fast only (quick feedback)
- pytest -m slow                  # Slow only
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Note: Unmarked tests are auto-assigned to 'fast' tier. To add a new test:
- No marker needed for fast (unit) tests
- Add @pytest.mark.medium for filesystem / multi-component tests
- Add @pytest.mark.slow for real Intercom API tests
- Tests marked @pytest.mark.integration (without tier) default to 'medium'

API Key Safety:
- Fast/medium tests force-set a fake INTERCOM_ACCESS_TOKEN so a mocking
  mistake can never reach the real workspace
- Only slow tests (and full suite) preserve a real token from environment
"""

import os
import sys
from pathlib import Path

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

FAKE_TOKEN = "test_token"


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests are fast by default unless explicitly marked as medium or slow.
    Tests marked @pytest.mark.integration (but no tier) go to 'medium'.
    """
    for item in items:
        # Note: Using explicit list checks instead of any() for reliability
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        # Skip if test is marked as skip (don't assign tier to skipped tests)
        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Force a fake Intercom token unless slow tests are selected."""
    markexpr = getattr(config.option, 'markexpr', '') or ''

    includes_slow_tests = (
        not markexpr or  # Full suite (no marker filter)
        (
            'slow' in markexpr and
            'not slow' not in markexpr  # Positively includes slow tests
        )
    )

    if includes_slow_tests:
        os.environ.setdefault("INTERCOM_ACCESS_TOKEN", FAKE_TOKEN)
    else:
        os.environ["INTERCOM_ACCESS_TOKEN"] = FAKE_TOKEN


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def cache_dir(tmp_path):
    """Empty per-test cache directory."""
    path = tmp_path / "cache"
    path.mkdir()
    return path
