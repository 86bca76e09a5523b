"""
ephemeraldb - Private SQL Server databases for integration tests
"""

__version__ = "0.1.0"

from .core import DatabaseFixture
from .errors import (
    ContainerStartError,
    EphemeralDbError,
    ProvisioningError,
    StartupTimeoutError,
    TeardownError,
)
from .models import FixtureConfig, Settings, StoreHandle

__all__ = [
    "DatabaseFixture",
    "FixtureConfig",
    "Settings",
    "StoreHandle",
    "EphemeralDbError",
    "ContainerStartError",
    "StartupTimeoutError",
    "ProvisioningError",
    "TeardownError",
]
