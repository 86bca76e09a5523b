"""pytest integration: a private SQL Server database per test."""

import asyncio

import pytest

from .core import DatabaseFixture
from .services.config_loader import ConfigLoader


def pytest_addoption(parser):
    group = parser.getgroup("ephemeraldb")
    group.addoption(
        "--ephemeraldb-config",
        action="store",
        default=None,
        help="YAML configuration file (defaults to .ephemeraldb.yml if present).",
    )
    group.addoption(
        "--ephemeraldb-retain",
        action="store_true",
        default=None,
        help="Keep test databases after each test for inspection.",
    )


@pytest.fixture(scope="session")
def ephemeraldb_settings(pytestconfig):
    return ConfigLoader().load_settings(
        pytestconfig.getoption("ephemeraldb_config"),
        retain_on_dispose=pytestconfig.getoption("ephemeraldb_retain"),
    )


@pytest.fixture
def ephemeral_database(ephemeraldb_settings):
    fixture = DatabaseFixture(settings=ephemeraldb_settings)
    store = asyncio.run(fixture.setup())
    yield store
    fixture.dispose()
