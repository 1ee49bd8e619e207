"""Module identifiers, descriptors and the collaborator protocols.

The bus never fetches module code. It asks a ModuleDirectory what a module id
refers to and an Installer whether that module is ready on disk, and only then
launches it.

Module ids:
    local:<path>                      a module in a local directory or file
    github:<owner>/<name>[#<branch>]  a module fetched from a repository,
                                      branch defaults to master
"""

import os
import re
from enum import Enum
from typing import Protocol

from pydantic import BaseModel

_GITHUB_ID = re.compile(
    r"^github:([a-zA-Z0-9\-_.]+)/([a-zA-Z0-9\-_.]+)(?:#([a-zA-Z0-9\-_.]+))?$"
)
_LOCAL_ID = re.compile(r"^local:(.+)$")

DEFAULT_BRANCH = "master"


class InvalidModuleIdError(ValueError):
    """Raised when a module id matches none of the supported forms."""

    def __init__(self, module_id: object):
        self.module_id = module_id
        super().__init__(f"Invalid `module_id`: {module_id!r}")


class ModuleKind(str, Enum):
    LOCAL = "local"
    GITHUB = "github"


class InstallStatus(str, Enum):
    """Result of an installation check.

    READY: the module can be launched
    MISSING: nothing usable on disk yet
    FAILED: present but broken (bad manifest, version mismatch)
    """

    READY = "ready"
    MISSING = "missing"
    FAILED = "failed"


class ModuleDescriptor(BaseModel):
    """Install metadata for a module. Opaque to the router.

    Attributes:
        module_id: Normalized module id, also the module's bus identity.
        kind: Where the module comes from.
        path: Filesystem path for local modules.
        owner: Repository owner for github modules.
        name: Repository or directory name.
        branch: Branch for github modules.
        version: Expected version, checked against the module manifest.
        active: Whether the module is started at manager boot.
    """

    module_id: str
    kind: ModuleKind
    path: str | None = None
    owner: str | None = None
    name: str | None = None
    branch: str | None = None
    version: str | None = None
    active: bool = True

    model_config = {"extra": "forbid", "frozen": True}


def parse_module_id(module_id: str, version: str | None = None) -> ModuleDescriptor:
    """Compute a descriptor from a module id.

    Raises:
        InvalidModuleIdError: If the id is not a local or github id.
    """
    if not isinstance(module_id, str):
        raise InvalidModuleIdError(module_id)

    match = _GITHUB_ID.match(module_id)
    if match:
        owner, name, branch = match.groups()
        branch = branch or DEFAULT_BRANCH
        return ModuleDescriptor(
            module_id=f"github:{owner}/{name}#{branch}",
            kind=ModuleKind.GITHUB,
            owner=owner,
            name=name,
            branch=branch,
            version=version,
        )

    match = _LOCAL_ID.match(module_id)
    if match:
        path = os.path.normpath(match.group(1))
        return ModuleDescriptor(
            module_id=f"local:{path}",
            kind=ModuleKind.LOCAL,
            path=path,
            name=os.path.splitext(os.path.basename(path))[0],
            version=version,
        )

    raise InvalidModuleIdError(module_id)


class ModuleDirectory(Protocol):
    """Where the host keeps the modules a session has added."""

    async def resolve(self, module_id: str) -> ModuleDescriptor | None:
        """Return the descriptor for ``module_id``, or None if unknown."""
        ...

    async def list(self) -> list[ModuleDescriptor]:
        ...

    async def add(self, descriptor: ModuleDescriptor) -> None:
        """Insert or replace the descriptor for its module id."""
        ...

    async def remove(self, module_id: str) -> bool:
        """Remove a module; returns whether it was present."""
        ...


class Installer(Protocol):
    """Checks that a module's code is ready to launch."""

    async def ensure_installed(self, descriptor: ModuleDescriptor) -> InstallStatus:
        ...
