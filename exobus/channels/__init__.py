"""Worker channel implementations."""

from exobus.channels.base import WorkerLaunchError, WorkerLauncher, WorkerProcess
from exobus.channels.inmemory import InMemoryLauncher, InMemoryProcess
from exobus.channels.subprocess import SubprocessLauncher, SubprocessWorker

__all__ = [
    "WorkerLaunchError",
    "WorkerLauncher",
    "WorkerProcess",
    "InMemoryLauncher",
    "InMemoryProcess",
    "SubprocessLauncher",
    "SubprocessWorker",
]
