"""Tests for workers running as real OS processes."""

import asyncio
import sys
from pathlib import Path

import pytest

from exobus.channels.base import WorkerLaunchError
from exobus.channels.subprocess import SubprocessLauncher
from exobus.core.manager import ModuleManager
from exobus.directory.base import parse_module_id
from exobus.directory.memory import InMemoryModuleDirectory

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process semantics")

ROOT = Path(__file__).resolve().parents[1]
WORKERS = Path(__file__).resolve().parent / "workers"


def module_id(script: str) -> str:
    return f"local:{WORKERS / script}"


@pytest.fixture
def launcher():
    return SubprocessLauncher(env={"PYTHONPATH": str(ROOT)})


@pytest.fixture
async def manager(launcher):
    mgr = ModuleManager(InMemoryModuleDirectory(), launcher, max_restarts=1, stop_grace_period=0.5)
    yield mgr
    await mgr.kill()


def test_command_for_python_entry(launcher):
    descriptor = parse_module_id(module_id("echo_module.py"))
    assert launcher.command(descriptor) == [sys.executable, str(WORKERS / "echo_module.py")]


def test_command_without_entry_point(launcher, tmp_path):
    with pytest.raises(WorkerLaunchError):
        launcher.command(parse_module_id(f"local:{tmp_path / 'empty'}"))


async def test_echo_over_stdio(manager):
    descriptor = await manager.add(module_id("echo_module.py"))
    assert await manager.call(descriptor.module_id, "echo", {"a": [1, "b"]}, timeout=10) == {"a": [1, "b"]}
    assert await manager.call(descriptor.module_id, "whoami", timeout=10) == descriptor.module_id


async def test_cooperative_stop(manager):
    descriptor = await manager.add(module_id("echo_module.py"))
    await manager.call(descriptor.module_id, "echo", timeout=10)
    process = manager.supervisor.get(descriptor.module_id).process

    await asyncio.wait_for(manager.stop_module(descriptor.module_id), timeout=5)
    assert process.returncode == 0


async def test_stubborn_module_is_force_killed(manager):
    descriptor = await manager.add(module_id("stubborn_module.py"))
    await manager.call(descriptor.module_id, "kill", timeout=10)
    process = manager.supervisor.get(descriptor.module_id).process

    await asyncio.wait_for(manager.stop_module(descriptor.module_id), timeout=5)
    assert process.returncode != 0
    assert manager.running() == []


async def test_crashing_module_gives_up(manager, wait_for):
    failed = []
    manager.on("module:failed", lambda d, **details: failed.append(details))

    await manager.add(module_id("crash_module.py"))
    await wait_for(lambda: failed, timeout=10)

    assert failed[0]["restart_count"] == 1
    assert failed[0]["exit_code"] == 3
