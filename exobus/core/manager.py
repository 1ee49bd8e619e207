"""Module manager: the host-facing facade over the bus.

The manager ties the supervisor and router to the session's module directory
and installer. A module must never prevent the host from starting, so the
boot procedure reports per-module failures as notifications instead of
raising.

Notifications (``manager.on(name, listener)``):
    init:list     (descriptors)          modules found at boot
    init:check    (descriptor, status)   install status of a module at boot
    init:start    (descriptor)           module started at boot
    init:failed   (descriptor, error)    module could not be started at boot
    module:started / module:restarted / module:failed / module:stopped
                  (descriptor, **details) lifecycle changes from the supervisor
    module:checked (descriptor, status=) install status before every start
"""

import asyncio
from collections import defaultdict
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from exobus.channels.base import WorkerLauncher
from exobus.core.envelope import RemoteProcedureError
from exobus.core.logging import configure_bus_logger
from exobus.core.procedures import HostProcedureRegistry, ProcedureHandler
from exobus.core.router import Router
from exobus.core.supervisor import (
    DEFAULT_MAX_RESTARTS,
    DEFAULT_STOP_GRACE_PERIOD,
    ModuleStartError,
    ProcessSupervisor,
)
from exobus.core.table import LifecycleState
from exobus.directory.base import Installer, ModuleDescriptor, ModuleDirectory, parse_module_id

DEFAULT_CALL_TIMEOUT = 30.0

Listener = Callable[..., Any]


@dataclass(frozen=True)
class ModuleInfo:
    """Snapshot of a module's runtime state."""

    module_id: str
    descriptor: ModuleDescriptor
    lifecycle_state: LifecycleState
    restart_count: int
    registrations: int
    pid: int | None


class ModuleManager:
    """Manages the running modules of one host session."""

    def __init__(
        self,
        directory: ModuleDirectory,
        launcher: WorkerLauncher,
        installer: Installer | None = None,
        host: HostProcedureRegistry | None = None,
        max_restarts: int = DEFAULT_MAX_RESTARTS,
        stop_grace_period: float = DEFAULT_STOP_GRACE_PERIOD,
    ) -> None:
        self.directory = directory
        self._listeners: dict[str, list[Listener]] = defaultdict(list)
        self._log = configure_bus_logger("exobus.manager")
        self.supervisor = ProcessSupervisor(
            launcher,
            host=host,
            installer=installer,
            max_restarts=max_restarts,
            stop_grace_period=stop_grace_period,
            notify=self._on_supervisor,
        )
        self._booting: set[str] = set()

    @property
    def router(self) -> Router:
        return self.supervisor.router

    @property
    def host(self) -> HostProcedureRegistry:
        return self.supervisor.host

    # -- notifications ------------------------------------------------------

    def on(self, name: str, listener: Listener) -> None:
        """Register a listener for a manager notification."""
        self._listeners[name].append(listener)

    def _emit(self, name: str, *args: Any, **details: Any) -> None:
        for listener in list(self._listeners.get(name, ())):
            try:
                listener(*args, **details)
            except Exception as e:
                self._log.error(
                    f"Listener for {name} raised: {e}",
                    extra={"notification": name, "error": str(e)},
                )

    def _on_supervisor(self, name: str, descriptor: ModuleDescriptor, **details: Any) -> None:
        self._emit(name, descriptor, **details)
        if name == "module:checked" and descriptor.module_id in self._booting:
            self._emit("init:check", descriptor, details["status"])

    # -- host participant ---------------------------------------------------

    def expose(self, procedure: str, handler: ProcedureHandler) -> None:
        """Expose a host procedure to modules."""
        self.host.expose(procedure, handler)

    def emit(self, event_type: str, payload: Any = None) -> None:
        """Publish an event on behalf of the host."""
        self.host.emit(event_type, payload)

    async def call(
        self,
        module_id: str,
        procedure: str,
        argument: Any = None,
        timeout: float | None = DEFAULT_CALL_TIMEOUT,
    ) -> Any:
        """Call a module procedure and wait for its reply.

        Raises:
            TimeoutError: If no reply arrived in time. A late reply is ignored.
            RemoteProcedureError: If the module replied with an error.
        """
        message_id, future = self.host.call(module_id, procedure, argument)
        try:
            reply = await asyncio.wait_for(future, timeout)
        except TimeoutError:
            raise TimeoutError(
                f"No reply from {module_id} to `{procedure}` within {timeout}s"
            ) from None
        finally:
            self.host.forget(message_id)
        if reply.error is not None:
            raise RemoteProcedureError(reply.error)
        return reply.result

    # -- module actions -----------------------------------------------------

    async def add(self, module_id: str, version: str | None = None, start: bool = True) -> ModuleDescriptor:
        """Add a module to the directory and optionally start it. Idempotent.

        Raises:
            InvalidModuleIdError: If ``module_id`` is malformed.
            ModuleStartError: If ``start`` is set and the module cannot start.
        """
        descriptor = parse_module_id(module_id, version=version)
        await self.directory.add(descriptor)
        self._log.info(f"Added {descriptor.module_id}", extra={"module_id": descriptor.module_id})
        if start and descriptor.module_id not in self.supervisor.modules:
            await self.supervisor.start(descriptor)
        return descriptor

    async def remove(self, module_id: str, stop: bool = True) -> bool:
        """Remove a module from the directory, stopping it first if asked.

        Returns:
            Whether the module was in the directory.
        """
        if stop:
            await self.supervisor.stop(module_id)
        removed = await self.directory.remove(module_id)
        self._log.info(f"Removed {module_id}", extra={"module_id": module_id})
        return removed

    async def start_module(self, module_id: str) -> None:
        """Start a module already present in the directory.

        Raises:
            ModuleStartError: If the module is unknown or cannot start.
        """
        descriptor = await self.directory.resolve(module_id)
        if descriptor is None:
            raise ModuleStartError(module_id, "not_found")
        await self.supervisor.start(descriptor)

    async def stop_module(self, module_id: str) -> None:
        await self.supervisor.stop(module_id)

    def info(self, module_id: str) -> ModuleInfo | None:
        record = self.supervisor.get(module_id)
        if record is None:
            return None
        return ModuleInfo(
            module_id=record.identity,
            descriptor=record.descriptor,
            lifecycle_state=record.lifecycle_state,
            restart_count=record.restart_count,
            registrations=len(record.registrations),
            pid=record.process.pid if record.process is not None else None,
        )

    def running(self) -> list[str]:
        return [
            identity
            for identity, record in self.supervisor.modules.items()
            if record.lifecycle_state == LifecycleState.RUNNING
        ]

    # -- boot / teardown ----------------------------------------------------

    async def init(self) -> list[ModuleDescriptor]:
        """Start every active module of the directory.

        Returns:
            The modules that started.
        """
        descriptors = await self.directory.list()
        self._emit("init:list", descriptors)

        async def boot(descriptor: ModuleDescriptor) -> ModuleDescriptor | None:
            self._booting.add(descriptor.module_id)
            try:
                await self.supervisor.start(descriptor)
            except ModuleStartError as e:
                self._log.error(
                    f"Module failed to start: {descriptor.module_id}: {e}",
                    extra={"module_id": descriptor.module_id, "reason": e.reason},
                )
                self._emit("init:failed", descriptor, e)
                return None
            finally:
                self._booting.discard(descriptor.module_id)
            self._emit("init:start", descriptor)
            return descriptor

        results = await asyncio.gather(*(boot(d) for d in descriptors if d.active))
        return [d for d in results if d is not None]

    async def kill(self) -> None:
        """Stop every running module, each with its own grace period.

        Host procedures still running afterwards are cancelled: their callers
        are gone.
        """
        await self.supervisor.shutdown()
        await self.router.close()
