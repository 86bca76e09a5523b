import asyncio
import sys
import time

import pytest

from ephemeraldb.errors import EphemeralDbError
from ephemeraldb.services.command_runner import CommandRunner


class DummyLogger:
    def debug(self, *_args, **_kwargs):
        return None

    def warning(self, *_args, **_kwargs):
        return None


def test_command_runner_raises_with_stderr():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(EphemeralDbError, match="boom"):
        asyncio.run(
            runner.run(
                [sys.executable, "-c", "import sys; sys.stderr.write('boom'); sys.exit(1)"],
                check=True,
                capture_output=True,
            )
        )


def test_command_runner_returns_when_check_disabled():
    runner = CommandRunner(logger=DummyLogger())

    result = asyncio.run(
        runner.run(
            [sys.executable, "-c", "import sys; sys.stdout.write('out'); sys.exit(3)"],
            check=False,
            capture_output=True,
        )
    )

    assert result.returncode == 3
    assert result.stdout == "out"


def test_command_runner_retries_before_success(tmp_path, monkeypatch):
    runner = CommandRunner(logger=DummyLogger())
    monkeypatch.chdir(tmp_path)

    command = [
        sys.executable,
        "-c",
        (
            "from pathlib import Path;"
            "p=Path('retry-counter.txt');"
            "n=int(p.read_text()) if p.exists() else 0;"
            "p.write_text(str(n+1));"
            "import sys; sys.exit(1 if n == 0 else 0)"
        ),
    ]

    result = asyncio.run(
        runner.run(
            command,
            check=True,
            capture_output=True,
            retry_count=1,
            retry_backoff_seconds=0.0,
        )
    )

    assert result.returncode == 0
    assert (tmp_path / "retry-counter.txt").read_text() == "2"


def test_command_runner_timeout_raises_error():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(EphemeralDbError, match="timed out"):
        asyncio.run(
            runner.run(
                [sys.executable, "-c", "import time; time.sleep(5)"],
                check=True,
                capture_output=True,
                timeout=0.1,
            )
        )


def test_command_runner_reports_missing_binary():
    runner = CommandRunner(logger=DummyLogger())

    with pytest.raises(EphemeralDbError, match="command not found"):
        asyncio.run(runner.run(["ephemeraldb-no-such-binary"], capture_output=True))


def test_command_runner_cancellation_returns_promptly():
    runner = CommandRunner(logger=DummyLogger())

    async def scenario():
        task = asyncio.create_task(
            runner.run([sys.executable, "-c", "import time; time.sleep(10)"], capture_output=True)
        )
        await asyncio.sleep(0.2)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    started = time.monotonic()
    asyncio.run(scenario())

    assert time.monotonic() - started < 5


def test_command_runner_applies_default_timeout():
    runner = CommandRunner(logger=DummyLogger(), default_timeout=0.1)

    with pytest.raises(EphemeralDbError, match="timed out after 0.1s"):
        asyncio.run(
            runner.run([sys.executable, "-c", "import time; time.sleep(5)"], capture_output=True)
        )
