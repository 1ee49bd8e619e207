"""Tests for the process supervisor: start, restart policy and stop."""

import asyncio

import pytest

from exobus.channels.inmemory import KILLED, InMemoryLauncher
from exobus.core.envelope import HOST_IDENTITY
from exobus.core.supervisor import ModuleStartError, ProcessSupervisor
from exobus.core.table import LifecycleState
from exobus.directory.base import InstallStatus


@pytest.fixture
def notifications():
    return []


@pytest.fixture
async def supervisor(launcher, notifications):
    def notify(name, descriptor, **details):
        notifications.append((name, descriptor.module_id, details))

    sup = ProcessSupervisor(launcher, stop_grace_period=0.2, notify=notify)
    yield sup
    await sup.shutdown()


def names(notifications):
    return [name for name, _, _ in notifications]


async def cooperative(process):
    """Worker that exits as soon as it is told to ``kill``."""
    async for message in process.incoming():
        if message.get("procedure") == "kill":
            return


class GatedInstaller:
    def __init__(self, status=InstallStatus.READY):
        self.status = status
        self.gate = asyncio.Event()
        self.gate.set()

    async def ensure_installed(self, descriptor):
        await self.gate.wait()
        return self.status


# =============================================================================
# Start
# =============================================================================


async def test_start_sends_init(supervisor, launcher, descriptor, notifications):
    record = await supervisor.start(descriptor("a"))

    assert record.lifecycle_state == LifecycleState.RUNNING
    assert record.restart_count == 0
    [call] = launcher.latest("local:a").received()
    assert call["type"] == "rpc_call"
    assert call["source"] == HOST_IDENTITY
    assert call["destination"] == "local:a"
    assert call["procedure"] == "init"
    assert names(notifications) == ["module:started"]


async def test_start_is_idempotent(supervisor, launcher, descriptor):
    first = await supervisor.start(descriptor("a"))
    second = await supervisor.start(descriptor("a"))
    assert first is second
    assert len(launcher.processes("local:a")) == 1


async def test_launch_failure_leaves_no_record(descriptor):
    sup = ProcessSupervisor(InMemoryLauncher(unlaunchable={"local:bad"}))
    with pytest.raises(ModuleStartError) as exc_info:
        await sup.start(descriptor("bad"))
    assert exc_info.value.reason == "launch_failed"
    assert "local:bad" not in sup.modules


@pytest.mark.parametrize("status", [InstallStatus.MISSING, InstallStatus.FAILED])
async def test_module_not_ready_is_not_launched(launcher, descriptor, status):
    sup = ProcessSupervisor(launcher, installer=GatedInstaller(status))
    with pytest.raises(ModuleStartError) as exc_info:
        await sup.start(descriptor("a"))
    assert exc_info.value.reason == status.value
    assert launcher.launched == []
    assert sup.modules == {}


async def test_stop_while_installing(launcher, descriptor):
    installer = GatedInstaller()
    installer.gate.clear()
    sup = ProcessSupervisor(launcher, installer=installer)

    start = asyncio.create_task(sup.start(descriptor("a")))
    await asyncio.sleep(0)
    stop = asyncio.create_task(sup.stop("local:a"))
    await asyncio.sleep(0)
    installer.gate.set()

    record = await start
    await stop
    assert record.lifecycle_state == LifecycleState.STOPPED
    assert launcher.launched == []
    assert sup.modules == {}


# =============================================================================
# Restart policy
# =============================================================================


async def test_fault_restarts_with_init(supervisor, launcher, descriptor, notifications, wait_for):
    await supervisor.start(descriptor("a"))
    launcher.latest("local:a").exit(1)

    await wait_for(lambda: len(launcher.processes("local:a")) == 2)
    record = supervisor.get("local:a")
    assert record.restart_count == 1
    assert record.lifecycle_state == LifecycleState.RUNNING
    [call] = launcher.latest("local:a").received()
    assert call["procedure"] == "init"
    assert ("module:restarted", "local:a", {"restart_count": 1}) in notifications


async def test_restart_budget_is_exhausted(supervisor, launcher, descriptor, notifications, wait_for):
    await supervisor.start(descriptor("a"))

    for restarts in range(1, 4):
        launcher.latest("local:a").exit(1)
        await wait_for(lambda: len(launcher.processes("local:a")) == restarts + 1)
        assert supervisor.get("local:a").restart_count == restarts

    launcher.latest("local:a").exit(1)
    await wait_for(lambda: "local:a" not in supervisor.modules)

    assert len(launcher.processes("local:a")) == 4
    name, module_id, details = notifications[-1]
    assert (name, module_id) == ("module:failed", "local:a")
    assert details["kind"] == "restart_exhausted"
    assert details["restart_count"] == 3
    assert details["exit_code"] == 1


async def test_crashing_worker_is_restarted(descriptor, notifications, wait_for):
    calls = []

    async def crash(process):
        calls.append(process.pid)
        raise RuntimeError("boom")

    launcher = InMemoryLauncher(workers=crash)
    sup = ProcessSupervisor(
        launcher,
        max_restarts=1,
        notify=lambda name, d, **details: notifications.append((name, d.module_id, details)),
    )
    await sup.start(descriptor("a"))
    await wait_for(lambda: "local:a" not in sup.modules)
    assert len(calls) == 2
    assert names(notifications)[-1] == "module:failed"


async def test_registrations_survive_restart(supervisor, launcher, descriptor, wait_for):
    await supervisor.start(descriptor("a"))
    supervisor.router.receive(
        "local:a", {"type": "register", "message_id": 1, "source_pattern": ".*", "type_pattern": ".*"}
    )
    launcher.latest("local:a").exit(1)
    await wait_for(lambda: len(launcher.processes("local:a")) == 2)

    supervisor.host.emit("tick")
    events = [m for m in launcher.latest("local:a").received() if m["type"] == "event"]
    assert len(events) == 1


async def test_events_skip_module_between_restarts(supervisor, launcher, descriptor, wait_for):
    await supervisor.start(descriptor("a"))
    record = supervisor.get("local:a")
    supervisor.router.receive(
        "local:a", {"type": "register", "message_id": 1, "source_pattern": ".*", "type_pattern": ".*"}
    )
    record.lifecycle_state = LifecycleState.STARTING
    supervisor.host.emit("tick")
    record.lifecycle_state = LifecycleState.RUNNING
    events = [m for m in launcher.latest("local:a").received() if m["type"] == "event"]
    assert events == []


# =============================================================================
# Stop
# =============================================================================


async def test_stop_cooperative_worker(descriptor, notifications):
    launcher = InMemoryLauncher(workers=cooperative)
    sup = ProcessSupervisor(
        launcher,
        stop_grace_period=5.0,
        notify=lambda name, d, **details: notifications.append((name, d.module_id, details)),
    )
    await sup.start(descriptor("a"))
    process = launcher.latest("local:a")

    await asyncio.wait_for(sup.stop("local:a"), timeout=1.0)

    assert process.returncode == 0
    assert process.kill_count == 0
    assert sup.modules == {}
    assert names(notifications) == ["module:started", "module:stopped"]
    assert len(launcher.processes("local:a")) == 1


async def test_stop_force_kills_after_grace_period(supervisor, launcher, descriptor):
    await supervisor.start(descriptor("a"))
    process = launcher.latest("local:a")

    await supervisor.stop("local:a")

    assert process.kill_count == 1
    assert process.returncode == KILLED
    kills = [m for m in process.received() if m.get("procedure") == "kill"]
    assert len(kills) == 1
    assert "local:a" not in supervisor.modules
    # Exit after stop is not a fault
    assert len(launcher.processes("local:a")) == 1


async def test_concurrent_stops_send_one_kill(supervisor, launcher, descriptor):
    await supervisor.start(descriptor("a"))
    process = launcher.latest("local:a")

    await asyncio.gather(supervisor.stop("local:a"), supervisor.stop("local:a"))

    kills = [m for m in process.received() if m.get("procedure") == "kill"]
    assert len(kills) == 1
    assert process.kill_count == 1


async def test_stop_unknown_module_is_noop(supervisor):
    await supervisor.stop("local:nothing")


async def test_calls_reach_stopping_module(supervisor, launcher, descriptor):
    await supervisor.start(descriptor("a"))
    await supervisor.start(descriptor("b"))
    a = launcher.latest("local:a")
    a.received()

    stopping = asyncio.create_task(supervisor.stop("local:a"))
    await asyncio.sleep(0)
    supervisor.router.receive(
        "local:b", {"type": "rpc_call", "message_id": 1, "destination": "local:a", "procedure": "x"}
    )
    procedures = [m["procedure"] for m in a.received()]
    assert procedures == ["kill", "x"]
    await stopping


async def test_shutdown_stops_everything(supervisor, launcher, descriptor):
    for name in ("a", "b", "c"):
        await supervisor.start(descriptor(name))

    await supervisor.shutdown()

    assert supervisor.modules == {}
    assert all(p.returncode is not None for p in launcher.launched)
    assert len(launcher.launched) == 3
