"""Subprocess execution service for ephemeraldb."""

import asyncio
import subprocess
from typing import List, Optional

from ephemeraldb.errors import EphemeralDbError
from ephemeraldb.errors_catalog import actionable_error


class CommandRunner:
    """Runs external commands asynchronously with consistent error handling."""

    def __init__(self, logger, default_timeout: Optional[float] = None):
        self.logger = logger
        self.default_timeout = default_timeout

    async def run(
        self,
        cmd: List[str],
        check: bool = True,
        capture_output: bool = False,
        timeout: Optional[float] = None,
        retry_count: int = 0,
        retry_backoff_seconds: float = 0.0,
    ) -> subprocess.CompletedProcess:
        cmd_str = " ".join(cmd)
        self.logger.debug("Executing: %s", cmd_str)

        effective_timeout = timeout if timeout is not None else self.default_timeout
        max_attempts = max(1, retry_count + 1)

        for attempt in range(1, max_attempts + 1):
            try:
                result = await self._execute(cmd, capture_output, effective_timeout)
            except FileNotFoundError as exc:
                raise EphemeralDbError(
                    actionable_error("docker_unavailable", detail=f"command not found: {cmd[0]}")
                ) from exc
            except asyncio.TimeoutError as exc:
                if attempt < max_attempts:
                    self.logger.warning(
                        "Command timed out on attempt %s/%s. Retrying in %.1fs: %s",
                        attempt,
                        max_attempts,
                        retry_backoff_seconds,
                        cmd_str,
                    )
                    await asyncio.sleep(retry_backoff_seconds)
                    continue
                raise EphemeralDbError(
                    f"Command timed out after {effective_timeout}s: {cmd_str}"
                ) from exc
            except OSError as exc:
                raise EphemeralDbError(f"Failed to execute command: {cmd_str}. {exc}") from exc

            if capture_output and result.stdout:
                self.logger.debug("Command output: %s", result.stdout.strip())

            if result.returncode == 0:
                return result

            stderr = (result.stderr or "").strip() if capture_output else ""
            message = f"Command failed ({result.returncode}): {cmd_str}"
            if stderr:
                message = f"{message}\n{stderr}"

            if attempt < max_attempts:
                self.logger.warning(
                    "Command failed on attempt %s/%s and will be retried in %.1fs.\n%s",
                    attempt,
                    max_attempts,
                    retry_backoff_seconds,
                    message,
                )
                await asyncio.sleep(retry_backoff_seconds)
                continue

            if check:
                raise EphemeralDbError(message)

            self.logger.debug(message)
            return result

        raise EphemeralDbError(f"Command failed after retries: {cmd_str}")

    async def _execute(
        self,
        cmd: List[str],
        capture_output: bool,
        timeout: Optional[float],
    ) -> subprocess.CompletedProcess:
        pipe = asyncio.subprocess.PIPE if capture_output else asyncio.subprocess.DEVNULL
        process = await asyncio.create_subprocess_exec(*cmd, stdout=pipe, stderr=pipe)
        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout)
        except BaseException:
            # timeout or cancellation: never leave the child running
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        return subprocess.CompletedProcess(
            cmd,
            process.returncode,
            stdout=stdout.decode("utf-8", errors="replace") if stdout is not None else None,
            stderr=stderr.decode("utf-8", errors="replace") if stderr is not None else None,
        )
