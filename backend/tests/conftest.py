"""
Pytest configuration for nostreward tests.
"""

import pytest

pytest_plugins = ('pytest_asyncio',)


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as an async test."
    )


@pytest.fixture
def codes_path(tmp_path):
    return tmp_path / "codes.json"


@pytest.fixture
def whitelist_path(tmp_path):
    return tmp_path / "whitelist.json"
