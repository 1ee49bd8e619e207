"""Envelope model and codec for exobus.

Every participant on the bus, worker modules and the host alike, exchanges
envelopes: small tagged JSON objects with a ``type``, a per-sender
``message_id`` and the sender identity in ``source``. The codec is the
isolation boundary of the bus, so decoding never raises: anything that does
not validate comes back as ``None`` and is dropped by the caller.
"""

import json
import re
from collections.abc import Mapping
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, StrictInt, StrictStr, TypeAdapter, ValidationError, field_validator

# Reserved identity of the embedding host on the bus
HOST_IDENTITY = "internal:exobus/host"

# Maximum raw envelope size accepted from a channel (1MB)
MAX_ENVELOPE_SIZE = 1_000_000


class ErrorKind(str, Enum):
    """Failure taxonomy of the bus.

    MALFORMED_ENVELOPE: dropped at the codec, never reported
    PROCEDURE_NOT_FOUND: reported to the caller in an rpc_reply
    HANDLER_ERROR: host procedure raised, reported in an rpc_reply
    PROCESS_FAULT: worker exited while running, restarted
    RESTART_EXHAUSTED: worker faulted too often, removed
    STOP_TIMEOUT: worker ignored kill, terminated forcibly
    """

    MALFORMED_ENVELOPE = "malformed_envelope"
    PROCEDURE_NOT_FOUND = "procedure_not_found"
    HANDLER_ERROR = "handler_error"
    PROCESS_FAULT = "process_fault"
    RESTART_EXHAUSTED = "restart_exhausted"
    STOP_TIMEOUT = "stop_timeout"


def _ensure_json(value: Any, field: str) -> Any:
    """Reject values that the channel could not serialize."""
    try:
        json.dumps(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{field} must be JSON-serializable: {e}") from e
    return value


class RpcError(BaseModel):
    """Error carried by a failed rpc_reply."""

    kind: StrictStr
    message: str = ""
    name: str | None = None

    model_config = {"extra": "ignore", "frozen": True}

    @classmethod
    def from_exception(cls, kind: ErrorKind | str, error: BaseException) -> "RpcError":
        kind = kind.value if isinstance(kind, ErrorKind) else kind
        return cls(kind=kind, message=str(error), name=type(error).__name__)


class RemoteProcedureError(Exception):
    """Raised to a caller whose rpc_call came back with an error.

    Attributes:
        kind: The error kind, e.g. "procedure_not_found".
        name: Exception name reported by the callee, if any.
        error: The raw RpcError.
    """

    def __init__(self, error: RpcError):
        self.error = error
        self.kind = error.kind
        self.name = error.name
        super().__init__(error.message or error.kind)


class _EnvelopeBase(BaseModel):
    message_id: StrictInt = Field(ge=0)
    source: StrictStr = Field(min_length=1)

    # Unknown fields are discarded so nothing a sender adds travels further
    model_config = {"extra": "ignore", "frozen": True}


class RegisterEnvelope(_EnvelopeBase):
    """Subscribe the sender to events matching two patterns."""

    type: Literal["register"] = "register"
    source_pattern: StrictStr
    type_pattern: StrictStr

    @field_validator("source_pattern", "type_pattern")
    @classmethod
    def validate_pattern(cls, v: str) -> str:
        try:
            re.compile(v)
        except re.error as e:
            raise ValueError(f"invalid pattern {v!r}: {e}") from e
        return v


class UnregisterEnvelope(_EnvelopeBase):
    """Drop the sender's registration created by message ``registration_id``."""

    type: Literal["unregister"] = "unregister"
    registration_id: StrictInt


class EventEnvelope(_EnvelopeBase):
    """Event published to every matching registration."""

    type: Literal["event"] = "event"
    event_type: StrictStr
    payload: Any = None

    @field_validator("event_type")
    @classmethod
    def validate_event_type(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("event_type must not be empty")
        return v

    @field_validator("payload")
    @classmethod
    def validate_payload(cls, v: Any) -> Any:
        return _ensure_json(v, "payload")


class RpcCallEnvelope(_EnvelopeBase):
    """Point-to-point procedure call."""

    type: Literal["rpc_call"] = "rpc_call"
    destination: StrictStr
    procedure: StrictStr
    argument: Any = None

    @field_validator("argument")
    @classmethod
    def validate_argument(cls, v: Any) -> Any:
        return _ensure_json(v, "argument")


class RpcReplyEnvelope(_EnvelopeBase):
    """Reply correlated to an rpc_call through ``original_id``."""

    type: Literal["rpc_reply"] = "rpc_reply"
    destination: StrictStr
    original_id: StrictInt
    result: Any = None
    error: RpcError | None = None

    @field_validator("result")
    @classmethod
    def validate_result(cls, v: Any) -> Any:
        return _ensure_json(v, "result")


Envelope = Annotated[
    Union[RegisterEnvelope, UnregisterEnvelope, EventEnvelope, RpcCallEnvelope, RpcReplyEnvelope],
    Field(discriminator="type"),
]

_ENVELOPE_ADAPTER: TypeAdapter[Envelope] = TypeAdapter(Envelope)


def decode(raw: Any, source: str | None = None) -> Envelope | None:
    """Validate a raw message into an Envelope.

    Args:
        raw: A JSON document (bytes or str) or an already parsed mapping.
        source: Identity of the channel the message arrived on. When given it
            replaces whatever ``source`` the sender wrote.

    Returns:
        The typed envelope, or None if the message is malformed.
    """
    if isinstance(raw, (bytes, bytearray)):
        if len(raw) > MAX_ENVELOPE_SIZE:
            return None
        try:
            raw = raw.decode("utf-8")
        except UnicodeDecodeError:
            return None
    if isinstance(raw, str):
        if len(raw.encode("utf-8", errors="surrogatepass")) > MAX_ENVELOPE_SIZE:
            return None
        try:
            raw = json.loads(raw)
        except ValueError:
            return None
    if not isinstance(raw, Mapping):
        return None

    data = dict(raw)
    if source is not None:
        data["source"] = source
    try:
        return _ENVELOPE_ADAPTER.validate_python(data)
    except ValidationError:
        return None


def encode(envelope: Envelope) -> dict[str, Any]:
    """Return the JSON-compatible wire form of an envelope.

    Only the declared envelope fields are emitted.
    """
    return envelope.model_dump(mode="json")
