"""In-process workers with the same contract as OS processes.

This launcher is suitable for development, testing and modules the host
trusts enough to run inside its own event loop. There is no isolation: a
worker is a coroutine, and its "process" exits when the coroutine returns,
raises, or is killed.
"""

import asyncio
import itertools
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Mapping
from typing import Any

from exobus.channels.base import WorkerLaunchError
from exobus.directory.base import ModuleDescriptor

logger = logging.getLogger("exobus.channels")

WorkerFn = Callable[["InMemoryProcess"], Awaitable[None]]

KILLED = -9

_EOF = object()


class InMemoryProcess:
    """A simulated worker process.

    The host side uses ``send``/``messages``/``wait``/``kill``. The worker
    side reads ``inbox`` (or iterates ``incoming()``), writes with ``post``
    and ends the process with ``exit``.
    """

    def __init__(self, descriptor: ModuleDescriptor, pid: int) -> None:
        self.descriptor = descriptor
        self.pid: int | None = pid
        self.inbox: asyncio.Queue[Any] = asyncio.Queue()
        self._outbox: asyncio.Queue[Any] = asyncio.Queue()
        self._exited: asyncio.Future[int] = asyncio.get_running_loop().create_future()
        self._task: asyncio.Task[None] | None = None
        self.kill_count = 0

    @property
    def module_id(self) -> str:
        return self.descriptor.module_id

    @property
    def returncode(self) -> int | None:
        return self._exited.result() if self._exited.done() else None

    # -- host side ----------------------------------------------------------

    def send(self, message: dict[str, Any]) -> None:
        if self._exited.done():
            return
        self.inbox.put_nowait(message)

    async def messages(self) -> AsyncIterator[Any]:
        while True:
            item = await self._outbox.get()
            if item is _EOF:
                return
            yield item

    async def wait(self) -> int:
        return await asyncio.shield(self._exited)

    def kill(self) -> None:
        if self._exited.done():
            return
        self.kill_count += 1
        self.exit(KILLED)

    # -- worker side --------------------------------------------------------

    def post(self, message: Any) -> None:
        """Write a message on the worker's outbound channel."""
        if self._exited.done():
            return
        self._outbox.put_nowait(message)

    def exit(self, code: int = 0) -> None:
        if self._exited.done():
            return
        self._exited.set_result(code)
        self._outbox.put_nowait(_EOF)
        self.inbox.put_nowait(_EOF)
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def incoming(self) -> AsyncIterator[Any]:
        """Messages sent to the worker, until the process exits."""
        while True:
            item = await self.inbox.get()
            if item is _EOF:
                return
            yield item

    async def receive(self, timeout: float = 1.0) -> Any:
        """Next message sent to the worker.

        Raises:
            TimeoutError: If nothing arrives in time.
            EOFError: If the process exited.
        """
        item = await asyncio.wait_for(self.inbox.get(), timeout)
        if item is _EOF:
            raise EOFError(f"{self.module_id} exited")
        return item

    def received(self) -> list[Any]:
        """Drain and return every message currently queued for the worker."""
        items = []
        while not self.inbox.empty():
            item = self.inbox.get_nowait()
            if item is not _EOF:
                items.append(item)
        return items


class InMemoryLauncher:
    """Launches coroutine workers.

    Args:
        workers: Worker coroutine per module id, or one for every module.
            Without a worker the process just stays up until killed or
            exited by the caller.
        unlaunchable: Module ids whose launch fails.
    """

    def __init__(
        self,
        workers: Mapping[str, WorkerFn] | WorkerFn | None = None,
        unlaunchable: set[str] | None = None,
    ) -> None:
        self._workers = workers
        self.unlaunchable = set(unlaunchable or ())
        self.launched: list[InMemoryProcess] = []
        self._pids = itertools.count(1)

    def _worker_for(self, descriptor: ModuleDescriptor) -> WorkerFn | None:
        if self._workers is None:
            return None
        if isinstance(self._workers, Mapping):
            return self._workers.get(descriptor.module_id)
        return self._workers

    def processes(self, module_id: str) -> list[InMemoryProcess]:
        """Every process launched for ``module_id``, oldest first."""
        return [p for p in self.launched if p.module_id == module_id]

    def latest(self, module_id: str) -> InMemoryProcess:
        return self.processes(module_id)[-1]

    async def launch(self, descriptor: ModuleDescriptor) -> InMemoryProcess:
        if descriptor.module_id in self.unlaunchable:
            raise WorkerLaunchError(descriptor.module_id, "launch refused")

        process = InMemoryProcess(descriptor, pid=next(self._pids))
        worker = self._worker_for(descriptor)
        if worker is not None:
            process._task = asyncio.create_task(self._run(worker, process))
        self.launched.append(process)
        return process

    async def _run(self, worker: WorkerFn, process: InMemoryProcess) -> None:
        try:
            await worker(process)
        except asyncio.CancelledError:
            return
        except Exception as e:
            logger.warning(
                f"In-memory worker {process.module_id} raised: {e}",
                extra={"module_id": process.module_id, "error": str(e)},
            )
            process.exit(1)
            return
        process.exit(0)
