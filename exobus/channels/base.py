"""Worker channel protocols.

A launcher turns a module descriptor into a running worker. The worker is
reached through a private bidirectional channel: ``send`` writes one encoded
envelope to the worker, ``messages`` yields what the worker writes, in order,
until the channel reaches end of file.
"""

from collections.abc import AsyncIterator
from typing import Any, Protocol

from exobus.directory.base import ModuleDescriptor


class WorkerLaunchError(Exception):
    """Raised when a worker process cannot be started.

    Attributes:
        module_id: The module that failed to launch.
    """

    def __init__(self, module_id: str, reason: str):
        self.module_id = module_id
        self.reason = reason
        super().__init__(f"Cannot launch {module_id}: {reason}")


class WorkerProcess(Protocol):
    """Handle on a running worker and its channel."""

    pid: int | None

    @property
    def returncode(self) -> int | None:
        """Exit code once the worker has exited, None while it runs."""
        ...

    def send(self, message: dict[str, Any]) -> None:
        """Queue one message for the worker. Never blocks or raises.

        Messages sent after the worker exited are dropped.
        """
        ...

    def messages(self) -> AsyncIterator[Any]:
        """Raw messages written by the worker, in order, until end of file."""
        ...

    async def wait(self) -> int:
        """Wait for the worker to exit and return its exit code."""
        ...

    def kill(self) -> None:
        """Forcibly terminate the worker. No-op if it already exited."""
        ...


class WorkerLauncher(Protocol):
    """Starts isolated workers."""

    async def launch(self, descriptor: ModuleDescriptor) -> WorkerProcess:
        """Start a worker for ``descriptor``.

        Raises:
            WorkerLaunchError: If the worker cannot be started.
        """
        ...
