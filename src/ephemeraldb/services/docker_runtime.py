"""Docker runtime services for ephemeraldb."""

import asyncio
import inspect
import re
from typing import List

from ephemeraldb.errors import ContainerStartError, EphemeralDbError, StartupTimeoutError
from ephemeraldb.errors_catalog import actionable_error
from ephemeraldb.models import ContainerSpec, ContainerState

_NAME_CONFLICT = re.compile(r"container name \S+ is already in use", re.IGNORECASE)
_FAILED_STATES = {"exited", "dead"}


class ContainerHandle:
    """Starts or reuses one named container shared by every fixture in a run.

    Start is idempotent: a container that already runs, or one that a
    concurrent caller created between our inspection and ``docker run``, is
    treated as started. The handle never stops the container on its own.
    Status queries are retried because the daemon answers ``docker ps`` with
    transient errors while many containers start at once.
    """

    STATUS_RETRY_COUNT = 2
    STATUS_RETRY_BACKOFF_SECONDS = 0.5

    def __init__(self, spec: ContainerSpec, command_runner, logger, console):
        self.spec = spec
        self.command_runner = command_runner
        self.logger = logger
        self.console = console

    async def ensure_started(
        self,
        timeout: float = 180.0,
        poll_interval: float = 1.0,
    ) -> ContainerState:
        try:
            await asyncio.wait_for(self._start_and_wait(poll_interval), timeout)
        except asyncio.TimeoutError as exc:
            raise StartupTimeoutError(
                actionable_error("startup_timeout", name=self.spec.name, timeout=f"{timeout:g}")
            ) from exc

        return ContainerState.HEALTHY

    async def _start_and_wait(self, poll_interval: float):
        await self.start()
        await self.wait_until_ready(poll_interval)

    async def start(self):
        status = await self._runtime_status()

        if status == "running":
            self.logger.debug("Container %s already running.", self.spec.name)
            return

        if status is not None:
            self.logger.info("Starting existing container %s (%s).", self.spec.name, status)
            result = await self._docker(["docker", "start", self.spec.name])
            if result.returncode != 0:
                raise self._start_error(result.stderr)
            return

        self.console.print(f"[blue]Creating container {self.spec.name} from {self.spec.image_ref}...[/blue]")
        self.logger.info("Creating container %s from %s", self.spec.name, self.spec.image_ref)
        result = await self._docker(self._build_run_command())
        if result.returncode == 0:
            return

        if _NAME_CONFLICT.search(result.stderr or ""):
            self.logger.info(
                "Container %s was created concurrently; reusing it.", self.spec.name
            )
            return

        raise self._start_error(result.stderr)

    async def is_ready(self) -> bool:
        try:
            outcome = self.spec.readiness_check()
            if inspect.isawaitable(outcome):
                outcome = await outcome
            return bool(outcome)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            self.logger.debug("Readiness check for %s failed: %s", self.spec.name, exc)
            return False

    async def wait_until_ready(self, poll_interval: float = 1.0):
        self.logger.info("Waiting for %s to accept connections...", self.spec.name)
        attempt = 0
        while True:
            attempt += 1
            if await self.is_ready():
                self.console.print(f"[green]{self.spec.name} is ready.[/green]")
                self.logger.info("%s ready after %s probe(s).", self.spec.name, attempt)
                return
            await asyncio.sleep(poll_interval)

    async def inspect_state(self) -> ContainerState:
        status = await self._runtime_status()
        if status is None:
            return ContainerState.NOT_STARTED
        if status in _FAILED_STATES:
            return ContainerState.FAILED
        if status != "running":
            return ContainerState.NOT_STARTED
        if await self.is_ready():
            return ContainerState.HEALTHY
        return ContainerState.STARTING

    async def remove(self):
        self.console.print(f"[dim]Removing container {self.spec.name}...[/dim]")
        self.logger.info("Removing container %s", self.spec.name)
        await self.command_runner.run(
            ["docker", "rm", "--force", "--volumes", self.spec.name],
            check=False,
            capture_output=True,
        )

    async def _runtime_status(self):
        result = await self._docker(
            [
                "docker",
                "ps",
                "--all",
                "--filter",
                f"name=^{self.spec.name}$",
                "--format",
                "{{.State}}",
            ],
            retry_count=self.STATUS_RETRY_COUNT,
            retry_backoff_seconds=self.STATUS_RETRY_BACKOFF_SECONDS,
        )
        if result.returncode != 0:
            raise self._start_error(result.stderr)

        lines = [line.strip() for line in (result.stdout or "").splitlines() if line.strip()]
        return lines[0].lower() if lines else None

    def _build_run_command(self) -> List[str]:
        cmd = ["docker", "run", "--detach", "--name", self.spec.name]
        for container_port, host_port in self.spec.ports:
            cmd.extend(["--publish", f"{host_port}:{container_port}"])
        for key, value in self.spec.env:
            cmd.extend(["--env", f"{key}={value}"])
        cmd.append(self.spec.image_ref)
        return cmd

    async def _docker(self, cmd: List[str], **options):
        try:
            return await self.command_runner.run(cmd, check=False, capture_output=True, **options)
        except EphemeralDbError as exc:
            raise ContainerStartError(str(exc)) from exc

    def _start_error(self, stderr) -> ContainerStartError:
        message = actionable_error(
            "container_start_failed", name=self.spec.name, image=self.spec.image_ref
        )
        detail = (stderr or "").strip()
        if detail:
            message = f"{message}\n{detail}"
        return ContainerStartError(message)
