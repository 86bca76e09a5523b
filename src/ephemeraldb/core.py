import asyncio
import logging
import os
import uuid
from contextlib import contextmanager
from typing import Optional

from rich.console import Console

from .errors import EphemeralDbError
from .errors_catalog import actionable_error
from .models import (
    ContainerSpec,
    DatabaseHandle,
    FixtureConfig,
    FixtureState,
    ReadinessCheck,
    Settings,
    StoreHandle,
)
from .services.command_runner import CommandRunner
from .services.database import DatabaseProvisioner
from .services.docker_runtime import ContainerHandle
from .services.journal import LifecycleJournal

console = Console(stderr=True)
logger = logging.getLogger("ephemeraldb")


def generate_database_name(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex}"


def build_container_spec(settings: Settings, readiness_check: ReadinessCheck) -> ContainerSpec:
    return ContainerSpec(
        image=settings.image,
        tag=settings.tag,
        name=settings.container_name,
        ports=((settings.container_port, settings.host_port),),
        env=(
            ("ACCEPT_EULA", "Y"),
            ("MSSQL_SA_PASSWORD", settings.sa_password),
            ("SA_PASSWORD", settings.sa_password),
        ),
        readiness_check=readiness_check,
    )


def build_container_handle(settings: Settings, provisioner: DatabaseProvisioner) -> ContainerHandle:
    """Container handle whose readiness check is a login against ``master``."""
    spec = build_container_spec(settings, lambda: asyncio.to_thread(provisioner.ping))
    return ContainerHandle(
        spec,
        command_runner=CommandRunner(logger=logger, default_timeout=settings.command_timeout),
        logger=logger,
        console=console,
    )


class DatabaseFixture:
    """Provides one private database to a test and removes it afterwards.

    The container behind the database is shared with every other fixture in
    the run and is never stopped here. The database belongs to this fixture
    alone: its name is generated at construction and is never reused.
    """

    def __init__(
        self,
        config: Optional[FixtureConfig] = None,
        settings: Optional[Settings] = None,
        container: Optional[ContainerHandle] = None,
        provisioner: Optional[DatabaseProvisioner] = None,
    ):
        self.settings = settings or Settings()
        self.config = config or self.settings.fixture_config()
        self.provisioner = provisioner or DatabaseProvisioner.from_settings(self.settings, logger)
        self.container = container or build_container_handle(self.settings, self.provisioner)

        self.database_name = generate_database_name(self.settings.database_prefix)
        self.database: Optional[DatabaseHandle] = None
        self.store: Optional[StoreHandle] = None
        self.provisioned = False
        self.state = FixtureState.UNINITIALIZED

        journal_file = None
        if self.settings.journal_dir:
            journal_file = os.path.join(self.settings.journal_dir, f"{self.database_name}.json")
        self.journal = LifecycleJournal(logger, clock=self.config.clock, journal_file=journal_file)
        self.journal.start(
            self.database_name,
            {
                "container": self.container.spec.name,
                "schema": self.config.schema,
                "retain_on_dispose": self.config.retain_on_dispose,
            },
        )
        self.journal.transition(self.state.value)

    async def __aenter__(self) -> StoreHandle:
        return await self.setup()

    async def __aexit__(self, *_exc_info):
        await asyncio.to_thread(self.dispose)

    async def setup(self, schema: Optional[str] = None) -> StoreHandle:
        return await self._setup(schema, provision=True)

    async def setup_without_provisioning(self, schema: Optional[str] = None) -> StoreHandle:
        """Return a handle whose database was never created."""
        return await self._setup(schema, provision=False)

    async def _setup(self, schema: Optional[str], provision: bool) -> StoreHandle:
        if self.state is not FixtureState.UNINITIALIZED:
            raise EphemeralDbError(
                actionable_error("fixture_already_set_up", database=self.database_name)
            )

        try:
            self._transition(FixtureState.CONTAINER_STARTING)
            with self._step("ensure_container"):
                await self.container.ensure_started(
                    timeout=self.settings.startup_timeout,
                    poll_interval=self.settings.poll_interval,
                )

            if provision:
                with self._step("create_database"):
                    await self._create_database()
                self._transition(FixtureState.DATABASE_PROVISIONED)

            url = self.provisioner.build_connection_descriptor(self.database_name)
            database = DatabaseHandle(self.database_name, url, container=self.container)
            store = StoreHandle(
                database_name=self.database_name,
                url=url,
                schema=schema or self.config.schema,
                engine=self.provisioner.engine_for(self.database_name),
                provisioned=provision,
                get_utc_now=self.config.clock,
            )
        except (Exception, asyncio.CancelledError):
            self._transition(FixtureState.FAILED)
            raise

        self.database = database
        self.store = store
        self._transition(FixtureState.STORE_READY, {"schema": store.schema, "provisioned": provision})
        return store

    async def _create_database(self):
        creation = asyncio.ensure_future(
            asyncio.to_thread(self.provisioner.create, self.database_name)
        )
        try:
            await asyncio.shield(creation)
        except asyncio.CancelledError:
            # the worker thread cannot be interrupted; wait for its outcome so
            # dispose() knows whether there is a database to drop
            await asyncio.wait({creation})
            if not creation.cancelled() and creation.exception() is None:
                self.provisioned = True
            raise
        self.provisioned = True

    def dispose(self):
        if self.state.is_disposed or self.state is FixtureState.UNINITIALIZED:
            return
        if self.state is FixtureState.FAILED and not self.provisioned:
            return

        if not self.provisioned:
            self.provisioner.clear_pool(self.database_name)
            self._release(FixtureState.DISPOSED_UNPROVISIONED)
            return

        if self.config.retain_on_dispose:
            self.provisioner.clear_pool(self.database_name)
            console.print(f"[yellow]Retaining database {self.database_name} for inspection.[/yellow]")
            logger.warning("Retaining database %s; drop it with `ephemeraldb prune`.", self.database_name)
            self._release(FixtureState.DISPOSED_RETAINED)
            return

        with self._step("drop_database"):
            self.provisioner.drop(self.database_name)
        self._release(FixtureState.DISPOSED_DROPPED)

    def _release(self, state: FixtureState):
        self.database = None
        self.store = None
        self._transition(state)

    def _transition(self, state: FixtureState, details=None):
        logger.debug("Fixture %s: %s -> %s", self.database_name, self.state.value, state.value)
        self.state = state
        self.journal.transition(state.value, details)

    @contextmanager
    def _step(self, name: str):
        self.journal.step_started(name)
        try:
            yield
        except (Exception, asyncio.CancelledError) as exc:
            self.journal.step_finished(name, "failed", error=str(exc) or type(exc).__name__)
            raise
        self.journal.step_finished(name, "success")
