"""Workers as operating system processes speaking JSON lines over stdio."""

import asyncio
import json
import logging
import os
import sys
from collections.abc import AsyncIterator, Mapping, Sequence
from pathlib import Path
from typing import Any

from exobus.channels.base import WorkerLaunchError
from exobus.core.envelope import MAX_ENVELOPE_SIZE
from exobus.directory.base import ModuleDescriptor
from exobus.directory.local import entry_point, module_path

logger = logging.getLogger("exobus.channels")

# Environment variable telling a worker its bus identity
MODULE_ID_ENV = "EXOBUS_MODULE_ID"


class SubprocessWorker:
    """A worker process; stdin carries envelopes to it, stdout from it.

    stderr is inherited so worker logs end up next to the host's.
    """

    def __init__(self, module_id: str, process: asyncio.subprocess.Process) -> None:
        self.module_id = module_id
        self.pid: int | None = process.pid
        self._process = process

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def send(self, message: dict[str, Any]) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing() or self._process.returncode is not None:
            logger.debug(
                f"Channel to {self.module_id} closed, dropping message",
                extra={"module_id": self.module_id},
            )
            return
        try:
            stdin.write(json.dumps(message).encode("utf-8") + b"\n")
        except (ConnectionError, RuntimeError) as e:
            logger.debug(
                f"Write to {self.module_id} failed: {e}",
                extra={"module_id": self.module_id, "error": str(e)},
            )

    async def messages(self) -> AsyncIterator[bytes]:
        stdout = self._process.stdout
        if stdout is None:
            return
        while True:
            try:
                line = await stdout.readline()
            except ValueError as e:
                # Over-long line; the reader discards it
                logger.warning(
                    f"Oversized message from {self.module_id} discarded: {e}",
                    extra={"module_id": self.module_id},
                )
                continue
            if not line:
                return
            line = line.strip()
            if line:
                yield line

    async def wait(self) -> int:
        return await self._process.wait()

    def kill(self) -> None:
        if self._process.returncode is not None:
            return
        try:
            self._process.kill()
        except ProcessLookupError:
            pass


class SubprocessLauncher:
    """Launches each module as ``python <entry>`` (or the entry itself).

    Args:
        modules_path: Root of installed repository modules.
        python: Interpreter for ``.py`` entry points.
        args: Extra command line arguments passed to every worker.
        env: Extra environment variables for every worker.
        cwd: Working directory of workers (defaults to the host's).
    """

    def __init__(
        self,
        modules_path: Path | str = "modules",
        python: str = sys.executable,
        args: Sequence[str] = (),
        env: Mapping[str, str] | None = None,
        cwd: Path | str | None = None,
    ) -> None:
        self.modules_path = Path(modules_path)
        self.python = python
        self.args = list(args)
        self.env = dict(env or {})
        self.cwd = cwd

    def command(self, descriptor: ModuleDescriptor) -> list[str]:
        entry = entry_point(module_path(descriptor, self.modules_path))
        if entry is None:
            raise WorkerLaunchError(descriptor.module_id, "no entry point found")
        if entry.suffix == ".py":
            return [self.python, str(entry), *self.args]
        return [str(entry), *self.args]

    async def launch(self, descriptor: ModuleDescriptor) -> SubprocessWorker:
        command = self.command(descriptor)
        env = {**os.environ, **self.env, MODULE_ID_ENV: descriptor.module_id}
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
                limit=MAX_ENVELOPE_SIZE + 1,
            )
        except OSError as e:
            raise WorkerLaunchError(descriptor.module_id, str(e)) from e

        logger.info(
            f"Launched {descriptor.module_id} (pid {process.pid})",
            extra={"module_id": descriptor.module_id, "pid": process.pid},
        )
        return SubprocessWorker(descriptor.module_id, process)
