"""Module directories and installers consumed by the supervisor."""

from exobus.directory.base import (
    InstallStatus,
    Installer,
    InvalidModuleIdError,
    ModuleDescriptor,
    ModuleDirectory,
    ModuleKind,
    parse_module_id,
)
from exobus.directory.local import LocalInstaller, entry_point, module_path
from exobus.directory.memory import InMemoryModuleDirectory
from exobus.directory.redis import RedisModuleDirectory

__all__ = [
    "InstallStatus",
    "Installer",
    "InvalidModuleIdError",
    "ModuleDescriptor",
    "ModuleDirectory",
    "ModuleKind",
    "parse_module_id",
    "LocalInstaller",
    "entry_point",
    "module_path",
    "InMemoryModuleDirectory",
    "RedisModuleDirectory",
]
