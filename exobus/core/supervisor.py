"""Process supervisor for exobus.

The supervisor owns the module table. For every module it:
- Waits for the installer to report the module ready, then launches a worker
- Reads the worker's channel and hands each message to the router
- Restarts a worker that exits while running, a bounded number of times
- Stops a worker by asking it to ``kill`` itself, and terminates it forcibly
  if it is still alive when the grace period ends

Every failure stays contained to its module: nothing here raises into the
host's dispatch loop.
"""

import asyncio
from collections.abc import Callable, Mapping
from types import MappingProxyType
from typing import Any

from exobus.channels.base import WorkerLauncher, WorkerProcess
from exobus.core.envelope import ErrorKind
from exobus.core.logging import configure_bus_logger
from exobus.core.procedures import HostProcedureRegistry
from exobus.core.router import Router
from exobus.core.table import LifecycleState, ModuleRecord
from exobus.directory.base import Installer, InstallStatus, ModuleDescriptor

# Restart policy defaults
DEFAULT_MAX_RESTARTS = 3
DEFAULT_STOP_GRACE_PERIOD = 5.0

Notify = Callable[..., None]


class ModuleStartError(Exception):
    """Raised when a module cannot be started.

    Attributes:
        module_id: The module that failed to start.
        reason: Short machine-readable reason ("missing", "failed", "launch_failed", ...).
    """

    def __init__(self, module_id: str, reason: str, detail: str | None = None):
        self.module_id = module_id
        self.reason = reason
        self.detail = detail
        message = f"Cannot start {module_id}: {reason}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class ProcessSupervisor:
    """Starts, restarts and stops module workers."""

    def __init__(
        self,
        launcher: WorkerLauncher,
        host: HostProcedureRegistry | None = None,
        installer: Installer | None = None,
        max_restarts: int = DEFAULT_MAX_RESTARTS,
        stop_grace_period: float = DEFAULT_STOP_GRACE_PERIOD,
        notify: Notify | None = None,
    ) -> None:
        self.launcher = launcher
        self.installer = installer
        self.max_restarts = max_restarts
        self.stop_grace_period = stop_grace_period
        self._notify_cb = notify
        self._modules: dict[str, ModuleRecord] = {}
        self.router = Router(self._modules, host)
        self._log = configure_bus_logger("exobus.supervisor")

    @property
    def host(self) -> HostProcedureRegistry:
        return self.router.host

    @property
    def modules(self) -> Mapping[str, ModuleRecord]:
        """Read-only view of the module table."""
        return MappingProxyType(self._modules)

    def get(self, identity: str) -> ModuleRecord | None:
        return self._modules.get(identity)

    def _notify(self, event: str, descriptor: ModuleDescriptor, **details: Any) -> None:
        if self._notify_cb is None:
            return
        try:
            self._notify_cb(event, descriptor, **details)
        except Exception as e:
            self._log.error(
                f"Notification listener for {event} raised: {e}",
                extra={"module_id": descriptor.module_id, "error": str(e)},
            )

    def _remove(self, record: ModuleRecord) -> None:
        if self._modules.get(record.identity) is record:
            del self._modules[record.identity]
        record.registrations.clear()

    # -- start --------------------------------------------------------------

    async def start(self, descriptor: ModuleDescriptor) -> ModuleRecord:
        """Start a module and return its record.

        Raises:
            ModuleStartError: If the module is not installed or cannot launch.
        """
        identity = descriptor.module_id
        record = self._modules.get(identity)
        if record is not None and record.lifecycle_state == LifecycleState.STOPPING:
            await record.stopped.wait()
            record = self._modules.get(identity)
        if record is not None:
            return record

        record = ModuleRecord(identity=identity, descriptor=descriptor)
        self._modules[identity] = record
        self._log.info(f"Starting {identity}", extra={"module_id": identity})

        if self.installer is not None:
            try:
                status = await self.installer.ensure_installed(descriptor)
            except Exception as e:
                self._abort_start(record)
                raise ModuleStartError(identity, InstallStatus.FAILED.value, str(e)) from e
            status = InstallStatus(status)
            self._notify("module:checked", descriptor, status=status)
            if status != InstallStatus.READY:
                self._abort_start(record)
                raise ModuleStartError(identity, status.value)
            if record.lifecycle_state == LifecycleState.STOPPING:
                # Stopped while waiting for the installer
                self._complete_stop(record)
                return record

        try:
            await self._spawn(record)
        except Exception as e:
            self._abort_start(record)
            raise ModuleStartError(identity, "launch_failed", getattr(e, "reason", str(e))) from e

        if record.lifecycle_state == LifecycleState.RUNNING:
            self._notify("module:started", descriptor)
        return record

    def _abort_start(self, record: ModuleRecord) -> None:
        self._remove(record)
        record.lifecycle_state = LifecycleState.STOPPED
        record.stopped.set()

    async def _spawn(self, record: ModuleRecord) -> None:
        """Launch a worker for ``record`` and wire it to the router.

        Raises:
            WorkerLaunchError: If the launcher fails.
        """
        record.lifecycle_state = (
            LifecycleState.STOPPING
            if record.lifecycle_state == LifecycleState.STOPPING
            else LifecycleState.STARTING
        )
        process = await self.launcher.launch(record.descriptor)
        record.process = process
        record.monitor = asyncio.create_task(
            self._monitor(record, process), name=f"exobus-monitor:{record.identity}"
        )

        if record.lifecycle_state == LifecycleState.STOPPING:
            # Stop was requested while the worker was launching
            self._begin_stop(record)
            return

        record.lifecycle_state = LifecycleState.RUNNING
        self._log.info(
            f"Module running: {record.identity}",
            extra={"module_id": record.identity, "restart_count": record.restart_count},
        )
        self.host.notify(record.identity, "init")

    async def _monitor(self, record: ModuleRecord, process: WorkerProcess) -> None:
        try:
            async for raw in process.messages():
                if record.process is not process:
                    break
                self.router.receive(record.identity, raw)
            code = await process.wait()
        except Exception as e:
            self._log.error(
                f"Channel of {record.identity} failed: {e}",
                extra={"module_id": record.identity, "error": str(e)},
            )
            process.kill()
            code = await process.wait()
        await self._on_exit(record, process, code)

    # -- exit handling ------------------------------------------------------

    async def _on_exit(self, record: ModuleRecord, process: WorkerProcess, code: int) -> None:
        if record.process is not process:
            return

        if record.lifecycle_state == LifecycleState.STOPPING:
            self._log.info(
                f"Module exited after stop: {record.identity}",
                extra={"module_id": record.identity, "exit_code": code},
            )
            self._complete_stop(record)
            return

        # Modules are long-lived: any exit while running is a fault
        self._log.warning(
            f"Module exited unexpectedly: {record.identity}",
            extra={
                "module_id": record.identity,
                "exit_code": code,
                "restart_count": record.restart_count,
                "kind": ErrorKind.PROCESS_FAULT.value,
            },
        )
        await self._recover(record, code)

    async def _recover(self, record: ModuleRecord, code: int | None) -> None:
        while record.lifecycle_state != LifecycleState.STOPPING:
            if record.restart_count >= self.max_restarts:
                self._retire(record, code)
                return

            record.restart_count += 1
            self._log.info(
                f"Restarting: {record.identity}",
                extra={"module_id": record.identity, "restart_count": record.restart_count},
            )
            try:
                await self._spawn(record)
            except Exception as e:
                self._log.warning(
                    f"Restart of {record.identity} failed: {getattr(e, 'reason', e)}",
                    extra={
                        "module_id": record.identity,
                        "restart_count": record.restart_count,
                        "kind": ErrorKind.PROCESS_FAULT.value,
                    },
                )
                record.process = None
                code = None
                continue
            if record.lifecycle_state == LifecycleState.RUNNING:
                self._notify(
                    "module:restarted", record.descriptor, restart_count=record.restart_count
                )
            return

        # A stop arrived while relaunching failed
        self._complete_stop(record)

    def _retire(self, record: ModuleRecord, code: int | None) -> None:
        self._remove(record)
        record.lifecycle_state = LifecycleState.STOPPED
        record.stopped.set()
        self._log.error(
            f"Module failed permanently after {record.restart_count} restarts: {record.identity}",
            extra={
                "module_id": record.identity,
                "restart_count": record.restart_count,
                "kind": ErrorKind.RESTART_EXHAUSTED.value,
            },
        )
        self._notify(
            "module:failed",
            record.descriptor,
            kind=ErrorKind.RESTART_EXHAUSTED.value,
            restart_count=record.restart_count,
            exit_code=code,
        )

    # -- stop ---------------------------------------------------------------

    async def stop(self, identity: str) -> None:
        """Stop a module and wait until it reached STOPPED.

        Stopping an unknown module is a no-op.
        """
        record = self._modules.get(identity)
        if record is None:
            return
        if record.lifecycle_state != LifecycleState.STOPPING:
            self._log.info(f"Stopping {identity}", extra={"module_id": identity})
            record.lifecycle_state = LifecycleState.STOPPING
            record.restart_count = 0
            process = record.process
            if process is not None and process.returncode is None:
                self._begin_stop(record)
            # Otherwise the exit monitor, start() or _spawn() completes the stop
        await record.stopped.wait()

    def _begin_stop(self, record: ModuleRecord) -> None:
        """Ask the worker to exit and arm the force-kill timer."""
        self.host.notify(record.identity, "kill")
        process = record.process
        record.grace_timer = asyncio.get_running_loop().call_later(
            self.stop_grace_period, self._force_kill, record, process
        )

    def _force_kill(self, record: ModuleRecord, process: WorkerProcess | None) -> None:
        record.grace_timer = None
        if process is None or record.process is not process or record.stopped.is_set():
            return
        if process.returncode is not None:
            return
        self._log.info(
            f"Module force kill: {record.identity}",
            extra={"module_id": record.identity, "kind": ErrorKind.STOP_TIMEOUT.value},
        )
        process.kill()

    def _complete_stop(self, record: ModuleRecord) -> None:
        if record.grace_timer is not None:
            record.grace_timer.cancel()
            record.grace_timer = None
        self._remove(record)
        record.lifecycle_state = LifecycleState.STOPPED
        record.stopped.set()
        self._notify("module:stopped", record.descriptor)

    async def shutdown(self) -> None:
        """Stop every module concurrently and wait for all of them."""
        identities = list(self._modules)
        if identities:
            await asyncio.gather(*(self.stop(identity) for identity in identities))
        self._log.info("All modules stopped.")
