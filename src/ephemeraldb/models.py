"""Shared domain models for ephemeraldb."""

import enum
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple, Union

from sqlalchemy.engine import URL, Engine

from .errors import EphemeralDbError

ReadinessCheck = Callable[[], Union[bool, Awaitable[bool]]]
Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


_TRUE_STRINGS = {"true", "yes", "on", "1"}
_FALSE_STRINGS = {"false", "no", "off", "0"}


def parse_bool(value: Any) -> bool:
    """Read a flag from config, where quoted YAML values arrive as strings."""
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        normalized = value.strip().lower()
        if normalized in _TRUE_STRINGS:
            return True
        if normalized in _FALSE_STRINGS:
            return False
    raise EphemeralDbError(f"Expected a boolean value, got {value!r}")


class ContainerState(enum.Enum):
    NOT_STARTED = "not_started"
    STARTING = "starting"
    HEALTHY = "healthy"
    FAILED = "failed"


class FixtureState(enum.Enum):
    UNINITIALIZED = "uninitialized"
    CONTAINER_STARTING = "container_starting"
    DATABASE_PROVISIONED = "database_provisioned"
    STORE_READY = "store_ready"
    DISPOSED_DROPPED = "disposed_dropped"
    DISPOSED_RETAINED = "disposed_retained"
    DISPOSED_UNPROVISIONED = "disposed_unprovisioned"
    FAILED = "failed"

    @property
    def is_disposed(self) -> bool:
        return self.name.startswith("DISPOSED_")


@dataclass(frozen=True)
class ContainerSpec:
    """Immutable description of the shared container a fixture relies on."""

    image: str
    tag: str
    name: str
    ports: Tuple[Tuple[int, int], ...]
    env: Tuple[Tuple[str, str], ...]
    readiness_check: ReadinessCheck = field(compare=False, repr=False)

    @property
    def image_ref(self) -> str:
        return f"{self.image}:{self.tag}"


@dataclass(frozen=True)
class DatabaseHandle:
    name: str
    url: URL
    container: Any = field(default=None, compare=False, repr=False)


@dataclass(frozen=True)
class FixtureConfig:
    """Per-fixture options, read-only once the fixture is constructed."""

    schema: str = "dbo"
    retain_on_dispose: bool = False
    clock: Clock = field(default=utc_now, compare=False, repr=False)


@dataclass(frozen=True)
class StoreHandle:
    """What a test receives to build the store under test."""

    database_name: str
    url: URL
    schema: str
    engine: Engine = field(compare=False, repr=False)
    provisioned: bool = True
    get_utc_now: Clock = field(default=utc_now, compare=False, repr=False)

    @property
    def connection_string(self) -> str:
        return self.url.render_as_string(hide_password=False)


@dataclass(frozen=True)
class Settings:
    """Container and engine constants, overridable from a YAML config file."""

    image: str = "mcr.microsoft.com/mssql/server"
    tag: str = "2019-latest"
    container_name: str = "ephemeraldb-tests-mssql"
    container_port: int = 1433
    host_port: int = 11433
    host: str = "localhost"
    sa_password: str = "!Passw0rd"
    odbc_driver: str = "ODBC Driver 18 for SQL Server"
    startup_timeout: float = 180.0
    poll_interval: float = 1.0
    command_timeout: float = 300.0
    database_prefix: str = "ephemeraldb"
    compatibility_level: int = 110
    schema: str = "dbo"
    retain_on_dispose: bool = False
    journal_dir: Optional[str] = None

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any]) -> "Settings":
        converters: Dict[str, Callable[[Any], Any]] = {
            "container_port": int,
            "host_port": int,
            "startup_timeout": float,
            "poll_interval": float,
            "compatibility_level": int,
            "command_timeout": float,
            "retain_on_dispose": parse_bool,
        }
        known = {item.name for item in fields(cls)}
        kwargs = {}
        for key, value in values.items():
            if key not in known or value is None:
                continue
            convert = converters.get(key, str)
            kwargs[key] = convert(value)
        return cls(**kwargs)

    def fixture_config(self, clock: Clock = utc_now) -> FixtureConfig:
        return FixtureConfig(
            schema=self.schema,
            retain_on_dispose=self.retain_on_dispose,
            clock=clock,
        )
