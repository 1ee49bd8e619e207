"""Host procedure registry: the embedding host's own participant on the bus."""

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any

from exobus.core.envelope import (
    HOST_IDENTITY,
    Envelope,
    EventEnvelope,
    RpcCallEnvelope,
    RpcReplyEnvelope,
)

ProcedureHandler = Callable[[Any], Any | Awaitable[Any]]


class ProcedureNotFoundError(Exception):
    """Raised when no host procedure is exposed under the requested name."""

    def __init__(self, procedure: str):
        self.procedure = procedure
        super().__init__(f"Procedure not found: `{procedure}`")


class HostProcedureRegistry:
    """Procedures the host exposes to modules, plus the host's message counter.

    The registry is the host identity on the bus. Everything the host sends
    (events, calls to modules, replies to modules) takes its message_id from
    the single counter here. Routing is delegated to the router the registry
    is attached to.
    """

    def __init__(self, identity: str = HOST_IDENTITY) -> None:
        self.identity = identity
        self._procedures: dict[str, ProcedureHandler] = {}
        self._message_id = 0
        self._pending: dict[int, asyncio.Future[RpcReplyEnvelope]] = {}
        self._route: Callable[[Envelope], None] | None = None

    def attach(self, route: Callable[[Envelope], None]) -> None:
        """Bind the registry to the router that delivers host envelopes."""
        self._route = route

    def _send(self, envelope: Envelope) -> None:
        if self._route is None:
            raise RuntimeError("HostProcedureRegistry is not attached to a router")
        self._route(envelope)

    def next_message_id(self) -> int:
        self._message_id += 1
        return self._message_id

    # -- procedures ---------------------------------------------------------

    def expose(self, name: str, handler: ProcedureHandler) -> None:
        """Expose ``handler`` as host procedure ``name``; last one wins."""
        self._procedures[name] = handler

    def __contains__(self, name: object) -> bool:
        return name in self._procedures

    def names(self) -> list[str]:
        return sorted(self._procedures)

    async def invoke(self, name: str, argument: Any = None) -> Any:
        """Run a host procedure.

        Raises:
            ProcedureNotFoundError: If nothing is exposed under ``name``.
            Exception: Whatever the handler raises.
        """
        handler = self._procedures.get(name)
        if handler is None:
            raise ProcedureNotFoundError(name)
        result = handler(argument)
        if inspect.isawaitable(result):
            result = await result
        return result

    # -- host-originated traffic --------------------------------------------

    def emit(self, event_type: str, payload: Any = None) -> EventEnvelope:
        """Publish an event on behalf of the host."""
        envelope = EventEnvelope(
            message_id=self.next_message_id(),
            source=self.identity,
            event_type=event_type,
            payload=payload,
        )
        self._send(envelope)
        return envelope

    def call(
        self, destination: str, procedure: str, argument: Any = None
    ) -> tuple[int, asyncio.Future[RpcReplyEnvelope]]:
        """Call a module procedure on behalf of the host.

        Returns:
            The call's message_id and a future resolved with the reply. The
            future never times out by itself; callers bound the wait and then
            ``forget`` the call.
        """
        envelope = RpcCallEnvelope(
            message_id=self.next_message_id(),
            source=self.identity,
            destination=destination,
            procedure=procedure,
            argument=argument,
        )
        future: asyncio.Future[RpcReplyEnvelope] = asyncio.get_running_loop().create_future()
        self._pending[envelope.message_id] = future
        self._send(envelope)
        return envelope.message_id, future

    def notify(self, destination: str, procedure: str, argument: Any = None) -> int:
        """Fire-and-forget host call; any reply is ignored."""
        envelope = RpcCallEnvelope(
            message_id=self.next_message_id(),
            source=self.identity,
            destination=destination,
            procedure=procedure,
            argument=argument,
        )
        self._send(envelope)
        return envelope.message_id

    def forget(self, message_id: int) -> None:
        future = self._pending.pop(message_id, None)
        if future is not None and not future.done():
            future.cancel()

    def resolve(self, reply: RpcReplyEnvelope) -> bool:
        """Hand a reply addressed to the host to its pending call.

        Returns:
            False for late or unknown replies, which are ignored.
        """
        future = self._pending.pop(reply.original_id, None)
        if future is None or future.done():
            return False
        future.set_result(reply)
        return True

    @property
    def pending_calls(self) -> int:
        return len(self._pending)
