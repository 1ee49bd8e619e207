"""Core components of the exobus message bus.

Types:
    Envelope: Tagged message exchanged on the bus (register, unregister,
        event, rpc_call, rpc_reply), validated by ``decode``.
    Registration / RegistrationTable: A module's event subscriptions.
    Router: Routes envelopes between modules and the host.
    HostProcedureRegistry: The host's exposed procedures and its message counter.
    ModuleRecord / LifecycleState: Supervisor-owned state of one module.
    ProcessSupervisor: Starts, restarts and stops module workers.
    ModuleManager: Host-facing facade over directory, supervisor and router.

Failure Handling:
    ErrorKind: The bus failure taxonomy.
    ProcedureNotFoundError: Unknown host procedure.
    RemoteProcedureError: An rpc_call came back with an error.
    ModuleStartError: A module could not be started.

Constants:
    HOST_IDENTITY: Reserved bus identity of the host.
    MAX_ENVELOPE_SIZE: Maximum raw envelope size in bytes (1MB).
"""

from exobus.core.envelope import (
    HOST_IDENTITY,
    MAX_ENVELOPE_SIZE,
    Envelope,
    ErrorKind,
    EventEnvelope,
    RegisterEnvelope,
    RemoteProcedureError,
    RpcCallEnvelope,
    RpcError,
    RpcReplyEnvelope,
    UnregisterEnvelope,
    decode,
    encode,
)
from exobus.core.manager import DEFAULT_CALL_TIMEOUT, ModuleInfo, ModuleManager
from exobus.core.procedures import HostProcedureRegistry, ProcedureNotFoundError
from exobus.core.registrations import Registration, RegistrationTable
from exobus.core.router import Router, RouterStats
from exobus.core.supervisor import (
    DEFAULT_MAX_RESTARTS,
    DEFAULT_STOP_GRACE_PERIOD,
    ModuleStartError,
    ProcessSupervisor,
)
from exobus.core.table import LifecycleState, ModuleRecord

__all__ = [
    "HOST_IDENTITY",
    "MAX_ENVELOPE_SIZE",
    "Envelope",
    "ErrorKind",
    "EventEnvelope",
    "RegisterEnvelope",
    "RemoteProcedureError",
    "RpcCallEnvelope",
    "RpcError",
    "RpcReplyEnvelope",
    "UnregisterEnvelope",
    "decode",
    "encode",
    "DEFAULT_CALL_TIMEOUT",
    "ModuleInfo",
    "ModuleManager",
    "HostProcedureRegistry",
    "ProcedureNotFoundError",
    "Registration",
    "RegistrationTable",
    "Router",
    "RouterStats",
    "DEFAULT_MAX_RESTARTS",
    "DEFAULT_STOP_GRACE_PERIOD",
    "ModuleStartError",
    "ProcessSupervisor",
    "LifecycleState",
    "ModuleRecord",
]
