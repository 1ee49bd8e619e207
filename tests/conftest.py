"""Pytest configuration, Hypothesis profiles and shared bus fixtures."""

import asyncio
from collections.abc import Callable

import pytest
from hypothesis import settings

from exobus.channels.inmemory import InMemoryLauncher
from exobus.core.supervisor import ProcessSupervisor
from exobus.directory.base import ModuleDescriptor, parse_module_id
from exobus.worker import ModuleClient

# Register Hypothesis profiles
settings.register_profile("ci", max_examples=100)
settings.register_profile("dev", max_examples=20)

# Load dev profile by default, CI can override via --hypothesis-profile=ci
settings.load_profile("dev")


@pytest.fixture(scope="session")
def anyio_backend() -> str:
    """Use asyncio as the async backend for pytest-asyncio."""
    return "asyncio"


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll until ``predicate`` holds, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def wait_for() -> Callable:
    return eventually


@pytest.fixture
def descriptor() -> Callable[[str], ModuleDescriptor]:
    """Build a local descriptor from a short module name."""

    def make(name: str) -> ModuleDescriptor:
        return parse_module_id(f"local:{name}")

    return make


@pytest.fixture
def launcher() -> InMemoryLauncher:
    return InMemoryLauncher()


@pytest.fixture
async def supervisor(launcher):
    sup = ProcessSupervisor(launcher, stop_grace_period=0.2)
    yield sup
    await sup.shutdown()


@pytest.fixture
def client_worker() -> Callable:
    """Build an in-memory worker that serves a ModuleClient prepared by ``setup``."""

    def make(setup: Callable[[ModuleClient], None] | None = None) -> Callable:
        async def worker(process) -> None:
            client = ModuleClient(process.post, process.incoming(), module_id=process.module_id)
            if setup is not None:
                setup(client)
            await client.run()

        return worker

    return make
