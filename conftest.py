"""
Pytest configuration for the LC-3 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not tty"    # skip tests that need a pseudo-terminal
"""

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "tty: tests that open a pseudo-terminal (deselect where pty is unavailable)")


@pytest.fixture(autouse=True)
def _clean_lc3_environment(monkeypatch):
    """Keep the caller's LC3_* settings out of the CLI defaults."""
    monkeypatch.delenv("LC3_MAX_STEPS", raising=False)
    monkeypatch.delenv("LC3_POLL_TIMEOUT", raising=False)
