import pytest
from sqlalchemy.engine import URL
from sqlalchemy.exc import OperationalError
from sqlalchemy.pool import NullPool

from ephemeraldb.errors import ProvisioningError, TeardownError
from ephemeraldb.models import Settings
from ephemeraldb.services.database import DatabaseProvisioner, quote_name


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def info(self, *_args, **_kwargs):
        return None


class FakeResult:
    def __init__(self, rows):
        self.rows = rows

    def scalar(self):
        return self.rows[0][0] if self.rows else None

    def __iter__(self):
        return iter(self.rows)


class FakeConnection:
    def __init__(self, engine):
        self.engine = engine

    def __enter__(self):
        return self

    def __exit__(self, *_exc_info):
        return False

    def exec_driver_sql(self, statement):
        self.engine.log.append(("sql", statement))
        if self.engine.fail_on and self.engine.fail_on in statement:
            raise OperationalError(statement, None, Exception(self.engine.failure_message))
        return FakeResult([(1,)])

    def execute(self, clause, params=None):
        self.engine.log.append(("query", str(clause), params))
        return FakeResult(self.engine.rows)


class FakeEngine:
    def __init__(self, url, log, fail_on=None, failure_message="", rows=None, **kwargs):
        self.url = url
        self.kwargs = kwargs
        self.log = log
        self.fail_on = fail_on
        self.failure_message = failure_message
        self.rows = rows or []
        self.disposed = False

    def connect(self):
        return FakeConnection(self)

    def dispose(self):
        self.disposed = True
        self.log.append(("dispose", self.url.database))


class EngineFactory:
    def __init__(self, fail_on=None, failure_message="", rows=None):
        self.log = []
        self.engines = []
        self.fail_on = fail_on
        self.failure_message = failure_message
        self.rows = rows

    def __call__(self, url, **kwargs):
        engine = FakeEngine(
            url,
            self.log,
            fail_on=self.fail_on,
            failure_message=self.failure_message,
            rows=self.rows,
            **kwargs,
        )
        self.engines.append(engine)
        return engine

    def statements(self):
        return [entry[1] for entry in self.log if entry[0] == "sql"]


def _provisioner(factory: EngineFactory, **settings_overrides) -> DatabaseProvisioner:
    settings = Settings(**settings_overrides)
    return DatabaseProvisioner.from_settings(settings, DummyLogger(), create_engine_fn=factory)


def test_from_settings_targets_master_on_the_mapped_host_port():
    provisioner = _provisioner(EngineFactory(), host_port=21433, sa_password="s3cret!")

    url = provisioner.admin_url
    assert url.drivername == "mssql+pyodbc"
    assert url.database == "master"
    assert url.port == 21433
    assert url.username == "sa"
    assert url.password == "s3cret!"
    assert url.query["driver"] == "ODBC Driver 18 for SQL Server"


def test_create_issues_ddl_sequence_over_autocommit_admin_connection():
    factory = EngineFactory()
    provisioner = _provisioner(factory)

    provisioner.create("ephemeraldb-abc")

    assert factory.statements() == [
        "CREATE DATABASE [ephemeraldb-abc]",
        "ALTER DATABASE [ephemeraldb-abc] SET SINGLE_USER",
        "ALTER DATABASE [ephemeraldb-abc] SET COMPATIBILITY_LEVEL=110",
        "ALTER DATABASE [ephemeraldb-abc] SET MULTI_USER",
    ]
    admin_engine = factory.engines[0]
    assert admin_engine.url.database == "master"
    assert admin_engine.kwargs["isolation_level"] == "AUTOCOMMIT"
    assert admin_engine.kwargs["poolclass"] is NullPool


def test_create_uses_configured_compatibility_level():
    factory = EngineFactory()
    provisioner = _provisioner(factory, compatibility_level=150)

    provisioner.create("ephemeraldb-abc")

    assert "ALTER DATABASE [ephemeraldb-abc] SET COMPATIBILITY_LEVEL=150" in factory.statements()


def test_create_failure_raises_provisioning_error_without_cleanup():
    factory = EngineFactory(fail_on="CREATE DATABASE", failure_message="Database already exists")
    provisioner = _provisioner(factory)

    with pytest.raises(ProvisioningError, match="already exists"):
        provisioner.create("ephemeraldb-abc")

    assert factory.statements() == ["CREATE DATABASE [ephemeraldb-abc]"]


def test_connection_descriptor_targets_database_with_mars_enabled():
    provisioner = _provisioner(EngineFactory())

    url = provisioner.build_connection_descriptor("ephemeraldb-abc")

    assert isinstance(url, URL)
    assert url.database == "ephemeraldb-abc"
    assert url.query["MARS_Connection"] == "yes"
    assert url.query["driver"] == "ODBC Driver 18 for SQL Server"
    assert provisioner.admin_url.database == "master"
    assert "MARS_Connection=yes" in url.render_as_string(hide_password=False)


def test_engine_for_caches_one_engine_per_database():
    factory = EngineFactory()
    provisioner = _provisioner(factory)

    first = provisioner.engine_for("ephemeraldb-abc")
    second = provisioner.engine_for("ephemeraldb-abc")

    assert first is second
    assert first.url.database == "ephemeraldb-abc"


def test_drop_clears_pool_then_forces_single_user_then_drops():
    factory = EngineFactory()
    provisioner = _provisioner(factory)
    store_engine = provisioner.engine_for("ephemeraldb-abc")

    provisioner.drop("ephemeraldb-abc")

    assert store_engine.disposed is True
    assert factory.log[0] == ("dispose", "ephemeraldb-abc")
    assert factory.statements() == [
        "ALTER DATABASE [ephemeraldb-abc] SET SINGLE_USER WITH ROLLBACK IMMEDIATE",
        "DROP DATABASE [ephemeraldb-abc]",
    ]
    assert provisioner.engine_for("ephemeraldb-abc") is not store_engine


def test_drop_failure_raises_teardown_error():
    factory = EngineFactory(fail_on="DROP DATABASE", failure_message="database is in use")
    provisioner = _provisioner(factory)

    with pytest.raises(TeardownError, match="database is in use"):
        provisioner.drop("ephemeraldb-abc")


def test_quote_name_escapes_closing_brackets():
    assert quote_name("weird]name") == "[weird]]name]"


def test_list_databases_escapes_like_wildcards_in_prefix():
    factory = EngineFactory(rows=[("ephemeral_db-1",), ("ephemeral_db-2",)])
    provisioner = _provisioner(factory)

    names = provisioner.list_databases("ephemeral_db")

    assert names == ["ephemeral_db-1", "ephemeral_db-2"]
    _, query, params = factory.log[-1]
    assert "ESCAPE" in query
    assert params == {"pattern": "ephemeral\\_db-%"}


def test_inspection_helpers_read_sys_databases():
    factory = EngineFactory(rows=[(110,)])
    provisioner = _provisioner(factory)

    assert provisioner.get_compatibility_level("ephemeraldb-abc") == 110
    assert provisioner.database_exists("ephemeraldb-abc") is True

    empty = _provisioner(EngineFactory(rows=[]))
    assert empty.get_compatibility_level("missing") is None
    assert empty.database_exists("missing") is False


def test_close_disposes_cached_and_admin_engines():
    factory = EngineFactory()
    provisioner = _provisioner(factory)
    store_engine = provisioner.engine_for("ephemeraldb-abc")
    provisioner.ping()
    admin_engine = provisioner.admin_engine

    provisioner.close()

    assert store_engine.disposed is True
    assert admin_engine.disposed is True
