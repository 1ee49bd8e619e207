"""Module records: one per running or pending module process."""

import asyncio
from dataclasses import dataclass, field
from enum import Enum

from exobus.channels.base import WorkerProcess
from exobus.core.envelope import Envelope, encode
from exobus.core.registrations import RegistrationTable
from exobus.directory.base import ModuleDescriptor


class LifecycleState(str, Enum):
    """starting -> running -> stopping -> stopped, or running -> starting on a fault."""

    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"


@dataclass(eq=False)
class ModuleRecord:
    """Supervisor-owned state of one module.

    Attributes:
        identity: Bus identity, the normalized module id.
        descriptor: Install metadata used to (re)launch the module.
        process: Handle on the current worker, None before launch.
        restart_count: Automatic restarts consumed since the module was started.
        registrations: The module's event registrations.
        lifecycle_state: Current state.
        grace_timer: Pending force-kill while stopping.
        monitor: Task reading the worker's channel and watching its exit.
        stopped: Set once the module reached STOPPED.
    """

    identity: str
    descriptor: ModuleDescriptor
    process: WorkerProcess | None = None
    restart_count: int = 0
    registrations: RegistrationTable = field(default_factory=RegistrationTable)
    lifecycle_state: LifecycleState = LifecycleState.STARTING
    grace_timer: asyncio.TimerHandle | None = None
    monitor: asyncio.Task[None] | None = None
    stopped: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def accepts_events(self) -> bool:
        return self.lifecycle_state == LifecycleState.RUNNING and self.process is not None

    @property
    def accepts_calls(self) -> bool:
        """Calls and replies still reach a stopping module (it is told to ``kill``)."""
        return (
            self.lifecycle_state in (LifecycleState.RUNNING, LifecycleState.STOPPING)
            and self.process is not None
        )

    def deliver(self, envelope: Envelope) -> None:
        if self.process is not None:
            self.process.send(encode(envelope))
