"""exobus - Message bus and process supervisor for isolated browser modules."""

from exobus.channels import InMemoryLauncher, SubprocessLauncher, WorkerLaunchError
from exobus.core import (
    HOST_IDENTITY,
    Envelope,
    ErrorKind,
    HostProcedureRegistry,
    LifecycleState,
    ModuleManager,
    ModuleStartError,
    ProcedureNotFoundError,
    ProcessSupervisor,
    RemoteProcedureError,
    Router,
    decode,
    encode,
)
from exobus.directory import (
    InMemoryModuleDirectory,
    InstallStatus,
    InvalidModuleIdError,
    LocalInstaller,
    ModuleDescriptor,
    RedisModuleDirectory,
    parse_module_id,
)
from exobus.worker import ModuleClient, run_stdio_module

__version__ = "0.1.0"

__all__ = [
    # Core
    "HOST_IDENTITY",
    "Envelope",
    "decode",
    "encode",
    "Router",
    "HostProcedureRegistry",
    "ProcessSupervisor",
    "ModuleManager",
    "LifecycleState",
    # Failure handling
    "ErrorKind",
    "ProcedureNotFoundError",
    "RemoteProcedureError",
    "ModuleStartError",
    "WorkerLaunchError",
    "InvalidModuleIdError",
    # Channels
    "InMemoryLauncher",
    "SubprocessLauncher",
    # Directory
    "ModuleDescriptor",
    "InstallStatus",
    "InMemoryModuleDirectory",
    "RedisModuleDirectory",
    "LocalInstaller",
    "parse_module_id",
    # Module side
    "ModuleClient",
    "run_stdio_module",
    # Meta
    "__version__",
]
