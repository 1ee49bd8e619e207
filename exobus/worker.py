"""Module-side client: what a module uses inside its worker process.

A module exposes procedures, subscribes to events, emits events and calls
other modules or the host. The client owns the module's message counter and
correlates replies to calls; it is the only place a call timeout exists.

Typical module::

    from exobus.worker import run_stdio_module

    def setup(client):
        client.expose("echo", lambda argument: argument)

    run_stdio_module(setup)
"""

import asyncio
import inspect
import json
import logging
import os
import re
import sys
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any

from exobus.core.envelope import (
    HOST_IDENTITY,
    MAX_ENVELOPE_SIZE,
    ErrorKind,
    EventEnvelope,
    RemoteProcedureError,
    RpcCallEnvelope,
    RpcError,
    RpcReplyEnvelope,
    decode,
)

logger = logging.getLogger("exobus.worker")

Handler = Callable[[Any], Any | Awaitable[Any]]
EventCallback = Callable[[EventEnvelope], Any | Awaitable[Any]]

DEFAULT_CALL_TIMEOUT = 30.0


class ModuleClient:
    """Bus endpoint of a module.

    Args:
        send: Writes one raw message (a JSON-compatible dict) to the host.
        incoming: Raw messages from the host, ending when the channel closes.
        module_id: The module's own identity, if known.
    """

    def __init__(
        self,
        send: Callable[[dict[str, Any]], None],
        incoming: AsyncIterable[Any],
        module_id: str | None = None,
    ) -> None:
        self.module_id = module_id
        self._send = send
        self._incoming = incoming
        self._message_id = 0
        self._procedures: dict[str, Handler] = {}
        self._subscriptions: dict[int, tuple[re.Pattern[str], re.Pattern[str], EventCallback]] = {}
        self._pending: dict[int, asyncio.Future[RpcReplyEnvelope]] = {}
        # Copies of an event still expected from the router, by (source, message_id)
        self._copies: dict[tuple[str, int], int] = {}
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = asyncio.Event()

        self.expose("init", lambda argument: None)
        self.expose("kill", self._kill)

    def _next_id(self) -> int:
        self._message_id += 1
        return self._message_id

    def _post(self, message: dict[str, Any]) -> int:
        message_id = self._next_id()
        self._send({**message, "message_id": message_id})
        return message_id

    # -- outbound -----------------------------------------------------------

    def expose(self, procedure: str, handler: Handler) -> None:
        """Expose a procedure to the host and other modules; last one wins."""
        self._procedures[procedure] = handler

    def register(self, source_pattern: str, type_pattern: str, callback: EventCallback) -> int:
        """Subscribe to events; returns the registration id.

        Raises:
            re.error: If a pattern does not compile.
        """
        patterns = (re.compile(source_pattern), re.compile(type_pattern))
        registration_id = self._post(
            {"type": "register", "source_pattern": source_pattern, "type_pattern": type_pattern}
        )
        self._subscriptions[registration_id] = (*patterns, callback)
        return registration_id

    def unregister(self, registration_id: int) -> None:
        self._subscriptions.pop(registration_id, None)
        self._post({"type": "unregister", "registration_id": registration_id})

    def emit(self, event_type: str, payload: Any = None) -> int:
        return self._post({"type": "event", "event_type": event_type, "payload": payload})

    async def call(
        self,
        destination: str,
        procedure: str,
        argument: Any = None,
        timeout: float | None = DEFAULT_CALL_TIMEOUT,
    ) -> Any:
        """Call a procedure of another module or of the host.

        Raises:
            TimeoutError: No reply in time; a late reply is ignored.
            RemoteProcedureError: The callee replied with an error.
            ConnectionError: The channel closed before the reply.
        """
        future: asyncio.Future[RpcReplyEnvelope] = asyncio.get_running_loop().create_future()
        message_id = self._next_id()
        self._pending[message_id] = future
        self._send(
            {
                "type": "rpc_call",
                "message_id": message_id,
                "destination": destination,
                "procedure": procedure,
                "argument": argument,
            }
        )
        try:
            reply = await asyncio.wait_for(future, timeout)
        except TimeoutError:
            raise TimeoutError(
                f"No reply from {destination} to `{procedure}` within {timeout}s"
            ) from None
        finally:
            self._pending.pop(message_id, None)
        if reply.error is not None:
            raise RemoteProcedureError(reply.error)
        return reply.result

    async def call_host(self, procedure: str, argument: Any = None, **kwargs: Any) -> Any:
        return await self.call(HOST_IDENTITY, procedure, argument, **kwargs)

    # -- inbound ------------------------------------------------------------

    async def run(self) -> None:
        """Serve the channel until it closes or the module is killed."""
        reader = asyncio.ensure_future(self._read())
        closed = asyncio.ensure_future(self._closed.wait())
        try:
            await asyncio.wait({reader, closed}, return_when=asyncio.FIRST_COMPLETED)
            if self._tasks:
                await asyncio.gather(*list(self._tasks), return_exceptions=True)
        finally:
            for task in (reader, closed):
                if not task.done():
                    task.cancel()
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("module channel closed"))
            self._pending.clear()

    async def _read(self) -> None:
        incoming = aiter(self._incoming)
        while True:
            try:
                raw = await anext(incoming)
            except StopAsyncIteration:
                return
            except ValueError as e:
                # Over-long line; the reader discards it
                logger.warning(f"Oversized message from host discarded: {e}")
                continue
            envelope = decode(raw)
            if envelope is None:
                logger.debug("Dropped malformed message from host")
                continue
            self._dispatch(envelope)

    def close(self) -> None:
        """Stop serving; in-flight procedures still send their replies."""
        self._closed.set()

    def _dispatch(self, envelope: Any) -> None:
        if isinstance(envelope, RpcCallEnvelope):
            self._spawn(self._answer(envelope))
        elif isinstance(envelope, RpcReplyEnvelope):
            future = self._pending.get(envelope.original_id)
            if future is not None and not future.done():
                future.set_result(envelope)
        elif isinstance(envelope, EventEnvelope):
            self._on_event(envelope)

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _on_event(self, envelope: EventEnvelope) -> None:
        # The router delivers one copy per matching registration; every matching
        # callback runs on the first copy and the remaining copies are skipped
        key = (envelope.source, envelope.message_id)
        remaining = self._copies.get(key)
        if remaining is not None:
            if remaining <= 1:
                del self._copies[key]
            else:
                self._copies[key] = remaining - 1
            return

        callbacks = [
            callback
            for source_pattern, type_pattern, callback in list(self._subscriptions.values())
            if source_pattern.search(envelope.source) and type_pattern.search(envelope.event_type)
        ]
        if len(callbacks) > 1:
            self._copies[key] = len(callbacks) - 1
        for callback in callbacks:
            self._spawn(self._run_callback(callback, envelope))

    async def _run_callback(self, callback: EventCallback, envelope: EventEnvelope) -> None:
        try:
            result = callback(envelope)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(
                f"Event callback for {envelope.event_type} raised: {e}",
                extra={"message_type": "event", "error": str(e)},
            )

    async def _answer(self, call: RpcCallEnvelope) -> None:
        reply: dict[str, Any] = {
            "type": "rpc_reply",
            "destination": call.source,
            "original_id": call.message_id,
            "result": None,
            "error": None,
        }
        handler = self._procedures.get(call.procedure)
        if handler is None:
            reply["error"] = RpcError(
                kind=ErrorKind.PROCEDURE_NOT_FOUND.value,
                message=f"Procedure not found: `{call.procedure}`",
            ).model_dump()
        else:
            try:
                result = handler(call.argument)
                if inspect.isawaitable(result):
                    result = await result
                json.dumps(result)
                reply["result"] = result
            except Exception as e:
                logger.error(
                    f"Procedure {call.procedure} raised: {e}",
                    extra={"procedure": call.procedure, "error": str(e)},
                )
                reply["error"] = RpcError.from_exception(ErrorKind.HANDLER_ERROR, e).model_dump()
        self._post(reply)

    def _kill(self, argument: Any) -> None:
        self.close()


def _stdout_send(message: dict[str, Any]) -> None:
    sys.stdout.write(json.dumps(message) + "\n")
    sys.stdout.flush()


async def connect_stdio(module_id: str | None = None) -> ModuleClient:
    """Client on this process's stdin/stdout, as set up by the subprocess launcher."""
    loop = asyncio.get_running_loop()
    reader = asyncio.StreamReader(limit=MAX_ENVELOPE_SIZE + 1)
    await loop.connect_read_pipe(lambda: asyncio.StreamReaderProtocol(reader), sys.stdin)
    return ModuleClient(
        _stdout_send, reader, module_id=module_id or os.environ.get("EXOBUS_MODULE_ID")
    )


def run_stdio_module(setup: Callable[[ModuleClient], Any] | None = None) -> None:
    """Run a module on stdin/stdout until the host kills it or the channel closes."""

    async def main() -> None:
        client = await connect_stdio()
        if setup is not None:
            result = setup(client)
            if inspect.isawaitable(result):
                await result
        await client.run()

    asyncio.run(main())
