"""Database provisioning and teardown services for ephemeraldb."""

import re
from typing import Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.pool import NullPool

from ephemeraldb.errors import ProvisioningError, TeardownError
from ephemeraldb.errors_catalog import actionable_error
from ephemeraldb.models import Settings


def quote_name(name: str) -> str:
    return "[" + name.replace("]", "]]") + "]"


def _like_prefix(prefix: str) -> str:
    return re.sub(r"([\\%_\[])", r"\\\1", prefix) + "-%"


class DatabaseProvisioner:
    """Creates, inspects and drops per-fixture databases on a SQL Server engine.

    Administrative statements run over an autocommit connection to the
    ``master`` catalog. Engines handed to tests are cached per database name so
    that their connection pools can be evicted before the database is dropped;
    SQL Server refuses to drop a database that still has sessions attached.
    """

    ADMIN_CATALOG = "master"
    COMPATIBILITY_LEVEL = 110
    LOGIN_TIMEOUT_SECONDS = 5

    def __init__(
        self,
        admin_url: URL,
        logger,
        compatibility_level: int = COMPATIBILITY_LEVEL,
        create_engine_fn=create_engine,
    ):
        self.admin_url = admin_url
        self.logger = logger
        self.compatibility_level = compatibility_level
        self.create_engine_fn = create_engine_fn
        self._admin_engine: Optional[Engine] = None
        self._engines: Dict[str, Engine] = {}

    @classmethod
    def from_settings(cls, settings: Settings, logger, create_engine_fn=create_engine):
        admin_url = URL.create(
            "mssql+pyodbc",
            username="sa",
            password=settings.sa_password,
            host=settings.host,
            port=settings.host_port,
            database=cls.ADMIN_CATALOG,
            query={"driver": settings.odbc_driver, "TrustServerCertificate": "yes"},
        )
        return cls(
            admin_url,
            logger=logger,
            compatibility_level=settings.compatibility_level,
            create_engine_fn=create_engine_fn,
        )

    @property
    def admin_engine(self) -> Engine:
        if self._admin_engine is None:
            self._admin_engine = self.create_engine_fn(
                self.admin_url,
                isolation_level="AUTOCOMMIT",
                poolclass=NullPool,
                connect_args={"timeout": self.LOGIN_TIMEOUT_SECONDS},
            )
        return self._admin_engine

    def build_connection_descriptor(self, database_name: str) -> URL:
        # MARS lets the store interleave reads and writes on one connection
        return self.admin_url.set(database=database_name).update_query_dict(
            {"MARS_Connection": "yes"}
        )

    def ping(self) -> bool:
        with self.admin_engine.connect() as connection:
            connection.exec_driver_sql("SELECT 1").scalar()
        return True

    def create(self, database_name: str):
        quoted = quote_name(database_name)
        statements = [
            f"CREATE DATABASE {quoted}",
            f"ALTER DATABASE {quoted} SET SINGLE_USER",
            f"ALTER DATABASE {quoted} SET COMPATIBILITY_LEVEL={self.compatibility_level}",
            f"ALTER DATABASE {quoted} SET MULTI_USER",
        ]

        self.logger.info("Creating database %s", database_name)
        try:
            with self.admin_engine.connect() as connection:
                for statement in statements:
                    self.logger.debug("Executing: %s", statement)
                    connection.exec_driver_sql(statement)
        except SQLAlchemyError as exc:
            raise ProvisioningError(
                actionable_error("provisioning_failed", database=database_name, detail=str(exc))
            ) from exc

    def engine_for(self, database_name: str) -> Engine:
        engine = self._engines.get(database_name)
        if engine is None:
            engine = self.create_engine_fn(self.build_connection_descriptor(database_name))
            self._engines[database_name] = engine
        return engine

    def clear_pool(self, database_name: str):
        engine = self._engines.pop(database_name, None)
        if engine is not None:
            self.logger.debug("Disposing connection pool for %s", database_name)
            engine.dispose()

    def drop(self, database_name: str):
        quoted = quote_name(database_name)

        self.logger.info("Dropping database %s", database_name)
        try:
            self.clear_pool(database_name)
            with self.admin_engine.connect() as connection:
                connection.exec_driver_sql(
                    f"ALTER DATABASE {quoted} SET SINGLE_USER WITH ROLLBACK IMMEDIATE"
                )
                connection.exec_driver_sql(f"DROP DATABASE {quoted}")
        except SQLAlchemyError as exc:
            raise TeardownError(
                actionable_error("teardown_failed", database=database_name, detail=str(exc))
            ) from exc

    def database_exists(self, database_name: str) -> bool:
        with self.admin_engine.connect() as connection:
            found = connection.execute(
                text("SELECT 1 FROM sys.databases WHERE name = :name"),
                {"name": database_name},
            ).scalar()
        return found is not None

    def get_compatibility_level(self, database_name: str) -> Optional[int]:
        with self.admin_engine.connect() as connection:
            level = connection.execute(
                text("SELECT compatibility_level FROM sys.databases WHERE name = :name"),
                {"name": database_name},
            ).scalar()
        return int(level) if level is not None else None

    def list_databases(self, prefix: str) -> List[str]:
        with self.admin_engine.connect() as connection:
            rows = connection.execute(
                text(
                    "SELECT name FROM sys.databases "
                    "WHERE name LIKE :pattern ESCAPE '\\' ORDER BY name"
                ),
                {"pattern": _like_prefix(prefix)},
            )
            return [row[0] for row in rows]

    def close(self):
        for database_name in list(self._engines):
            self.clear_pool(database_name)
        if self._admin_engine is not None:
            self._admin_engine.dispose()
            self._admin_engine = None
