"""Message router for exobus.

The router is the single place where envelopes change hands. It:
- Validates that the sender is a known module or the host
- Records and drops event registrations
- Fans events out to every matching registration of every other module
- Forwards rpc calls and replies, or answers calls addressed to the host

The router keeps no queue of its own. Delivery is a synchronous write to the
destination's channel, so per-sender order is the order ``route`` is called
in.
"""

import asyncio
from collections import defaultdict
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import ValidationError

from exobus.core.envelope import (
    Envelope,
    ErrorKind,
    EventEnvelope,
    RegisterEnvelope,
    RpcCallEnvelope,
    RpcError,
    RpcReplyEnvelope,
    UnregisterEnvelope,
    decode,
)
from exobus.core.logging import configure_bus_logger
from exobus.core.procedures import HostProcedureRegistry, ProcedureNotFoundError
from exobus.core.registrations import Registration
from exobus.core.table import ModuleRecord


@dataclass
class RouterStats:
    """Routing counters."""

    routed: dict[str, int] = field(default_factory=lambda: defaultdict(int))
    delivered: int = 0
    dropped: int = 0
    host_calls: int = 0


class Router:
    """Routes envelopes between modules and the host.

    Args:
        modules: The module table, read-only from the router's point of view
            except for the registrations of an envelope's own sender.
        host: The host participant. A fresh registry is created if omitted.
    """

    def __init__(
        self,
        modules: Mapping[str, ModuleRecord],
        host: HostProcedureRegistry | None = None,
    ) -> None:
        self._modules = modules
        self.host = host or HostProcedureRegistry()
        self.host.attach(self.route)
        self._log = configure_bus_logger("exobus.router")
        self._stats = RouterStats()
        self._host_tasks: set[asyncio.Task[None]] = set()
        self._deferred = 0

    def get_stats(self) -> RouterStats:
        """Return a copy of current statistics."""
        return RouterStats(
            routed=defaultdict(int, self._stats.routed),
            delivered=self._stats.delivered,
            dropped=self._stats.dropped,
            host_calls=self._stats.host_calls,
        )

    # -- ingress ------------------------------------------------------------

    def receive(self, source: str, raw: Any) -> Envelope | None:
        """Decode a raw message read from ``source``'s channel and route it.

        Malformed messages are dropped without a reply.
        """
        envelope = decode(raw, source=source)
        if envelope is None:
            self._stats.dropped += 1
            self._log.debug(
                f"Dropped malformed envelope from {source}",
                extra={"module_id": source, "kind": ErrorKind.MALFORMED_ENVELOPE.value},
            )
            return None
        self.route(envelope)
        return envelope

    def _is_known(self, identity: str) -> bool:
        return identity == self.host.identity or identity in self._modules

    def route(self, envelope: Envelope) -> None:
        if not self._is_known(envelope.source):
            self._drop(envelope, "unknown source")
            return

        self._stats.routed[envelope.type] += 1
        if isinstance(envelope, RegisterEnvelope):
            self._register(envelope)
        elif isinstance(envelope, UnregisterEnvelope):
            self._unregister(envelope)
        elif isinstance(envelope, EventEnvelope):
            self._event(envelope)
        elif isinstance(envelope, RpcCallEnvelope):
            self._rpc_call(envelope)
        elif isinstance(envelope, RpcReplyEnvelope):
            self._rpc_reply(envelope)

    def _drop(self, envelope: Envelope, reason: str) -> None:
        self._stats.dropped += 1
        self._log.debug(
            f"Dropped {envelope.type} from {envelope.source}: {reason}",
            extra={
                "module_id": envelope.source,
                "message_type": envelope.type,
                "message_id": envelope.message_id,
            },
        )

    def _deliver(self, record: ModuleRecord, envelope: Envelope) -> None:
        record.deliver(envelope)
        self._stats.delivered += 1

    # -- registrations ------------------------------------------------------

    def _register(self, envelope: RegisterEnvelope) -> None:
        # Registrations always belong to the sender; the host has none
        record = self._modules.get(envelope.source)
        if record is None:
            self._drop(envelope, "host cannot register")
            return
        record.registrations.add(
            Registration.compile(
                envelope.source_pattern, envelope.type_pattern, envelope.message_id
            )
        )
        self._log.debug(
            f"Registered {envelope.source} for {envelope.source_pattern!r} / {envelope.type_pattern!r}",
            extra={"module_id": envelope.source, "message_id": envelope.message_id},
        )

    def _unregister(self, envelope: UnregisterEnvelope) -> None:
        record = self._modules.get(envelope.source)
        if record is None:
            return
        record.registrations.remove(envelope.registration_id)

    # -- events -------------------------------------------------------------

    def _event(self, envelope: EventEnvelope) -> None:
        for identity, record in list(self._modules.items()):
            if identity == envelope.source or not record.accepts_events:
                continue
            for _ in record.registrations.matching(envelope.source, envelope.event_type):
                self._deliver(record, envelope)

    # -- rpc ----------------------------------------------------------------

    def _rpc_call(self, envelope: RpcCallEnvelope) -> None:
        if envelope.destination == self.host.identity:
            self._call_host(envelope)
            return
        record = self._modules.get(envelope.destination)
        if record is None or not record.accepts_calls:
            self._drop(envelope, f"unknown destination {envelope.destination}")
            return
        self._deliver(record, envelope)

    def _rpc_reply(self, envelope: RpcReplyEnvelope) -> None:
        if envelope.destination == self.host.identity:
            if not self.host.resolve(envelope):
                self._drop(envelope, "no pending host call")
            return
        record = self._modules.get(envelope.destination)
        if record is None or not record.accepts_calls:
            self._drop(envelope, f"unknown destination {envelope.destination}")
            return
        self._deliver(record, envelope)

    def _call_host(self, envelope: RpcCallEnvelope) -> None:
        self._stats.host_calls += 1
        task = asyncio.get_running_loop().create_task(self._invoke_host(envelope))
        self._host_tasks.add(task)
        task.add_done_callback(self._host_tasks.discard)

    async def _invoke_host(self, call: RpcCallEnvelope) -> None:
        result: Any = None
        error: RpcError | None = None
        try:
            result = await self.host.invoke(call.procedure, call.argument)
        except ProcedureNotFoundError as e:
            error = RpcError.from_exception(ErrorKind.PROCEDURE_NOT_FOUND, e)
        except Exception as e:
            error = RpcError.from_exception(ErrorKind.HANDLER_ERROR, e)
            self._log.warning(
                f"Host procedure {call.procedure} raised: {e}",
                extra={
                    "module_id": call.source,
                    "procedure": call.procedure,
                    "message_id": call.message_id,
                    "error": str(e),
                },
            )

        try:
            reply = self._host_reply(call, result, error)
        except ValidationError as e:
            reply = self._host_reply(
                call, None, RpcError.from_exception(ErrorKind.HANDLER_ERROR, e)
            )

        # Deliver on the next loop iteration, never from inside the handler's stack
        self._deferred += 1
        asyncio.get_running_loop().call_soon(self._route_deferred, reply)

    def _host_reply(
        self, call: RpcCallEnvelope, result: Any, error: RpcError | None
    ) -> RpcReplyEnvelope:
        return RpcReplyEnvelope(
            message_id=self.host.next_message_id(),
            source=self.host.identity,
            destination=call.source,
            original_id=call.message_id,
            result=result if error is None else None,
            error=error,
        )

    def _route_deferred(self, envelope: Envelope) -> None:
        self._deferred -= 1
        self.route(envelope)

    async def wait_idle(self) -> None:
        """Wait until every host call has been answered and its reply routed."""
        while self._host_tasks or self._deferred:
            if self._host_tasks:
                await asyncio.gather(*list(self._host_tasks), return_exceptions=True)
            else:
                await asyncio.sleep(0)

    async def close(self) -> None:
        """Cancel host calls still in flight; their replies are never sent."""
        tasks = list(self._host_tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
