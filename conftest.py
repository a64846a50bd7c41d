"""
Pytest configuration for the rm16 test suite.

    python -m pytest                 # everything
    python -m pytest -m "not cli"    # skip the end-to-end CLI tests
    python -m pytest -k TestBranches # one class
"""

import pytest


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers",
        "cli: tests that drive monitor16.main() or the interactive monitor")

