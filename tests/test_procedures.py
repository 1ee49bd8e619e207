"""Tests for HostProcedureRegistry."""

import asyncio

import pytest

from exobus.core.envelope import HOST_IDENTITY, EventEnvelope, RpcCallEnvelope, RpcReplyEnvelope
from exobus.core.procedures import HostProcedureRegistry, ProcedureNotFoundError


@pytest.fixture
def host():
    registry = HostProcedureRegistry()
    routed = []
    registry.attach(routed.append)
    registry.routed = routed
    return registry


async def test_invoke_sync_and_async_handlers(host):
    async def slow_double(argument):
        await asyncio.sleep(0)
        return argument * 2

    host.expose("inc", lambda argument: argument + 1)
    host.expose("double", slow_double)
    assert await host.invoke("inc", 1) == 2
    assert await host.invoke("double", 4) == 8


async def test_invoke_unknown_raises(host):
    with pytest.raises(ProcedureNotFoundError) as exc_info:
        await host.invoke("ping", None)
    assert exc_info.value.procedure == "ping"


async def test_expose_overwrites(host):
    host.expose("version", lambda argument: 1)
    host.expose("version", lambda argument: 2)
    assert await host.invoke("version") == 2
    assert host.names() == ["version"]
    assert "version" in host


async def test_handler_exception_propagates(host):
    def broken(argument):
        raise RuntimeError("boom")

    host.expose("broken", broken)
    with pytest.raises(RuntimeError, match="boom"):
        await host.invoke("broken")


async def test_host_envelopes_share_one_counter(host):
    host.emit("a")
    message_id, _ = host.call("local:m", "init")
    host.notify("local:m", "kill")
    host.emit("b")

    ids = [e.message_id for e in host.routed]
    assert ids == [1, 2, 3, 4]
    assert message_id == 2
    assert host.next_message_id() == 5
    assert all(e.source == HOST_IDENTITY for e in host.routed)


async def test_emit_builds_event(host):
    envelope = host.emit("state:change", {"x": 1})
    assert isinstance(envelope, EventEnvelope)
    assert host.routed == [envelope]
    assert envelope.event_type == "state:change"
    assert envelope.payload == {"x": 1}


async def test_call_resolves_with_reply(host):
    message_id, future = host.call("local:m", "echo", "hi")
    assert isinstance(host.routed[0], RpcCallEnvelope)
    reply = RpcReplyEnvelope(
        message_id=1, source="local:m", destination=HOST_IDENTITY, original_id=message_id, result="hi"
    )
    assert host.resolve(reply)
    assert (await future).result == "hi"
    assert host.pending_calls == 0


async def test_late_reply_is_ignored(host):
    message_id, future = host.call("local:m", "echo")
    host.forget(message_id)
    assert future.cancelled()
    reply = RpcReplyEnvelope(
        message_id=1, source="local:m", destination=HOST_IDENTITY, original_id=message_id
    )
    assert not host.resolve(reply)


def test_unattached_registry_cannot_send():
    with pytest.raises(RuntimeError):
        HostProcedureRegistry().emit("tick")
