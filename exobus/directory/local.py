"""Installation checks for modules already present on disk."""

import asyncio
import json
import logging
from pathlib import Path

from exobus.directory.base import InstallStatus, ModuleDescriptor, ModuleKind

logger = logging.getLogger("exobus.directory")

MANIFEST_NAME = "module.json"
ENTRY_POINTS = ("main.py", "__main__.py")


def module_path(descriptor: ModuleDescriptor, modules_path: Path | str) -> Path:
    """Directory (or file) holding a module's code.

    Local modules live where their id points. Repository modules live under
    ``<modules_path>/<owner>/<name>/#<branch>``.
    """
    if descriptor.kind == ModuleKind.LOCAL:
        return Path(descriptor.path or "")
    return Path(modules_path) / str(descriptor.owner) / str(descriptor.name) / f"#{descriptor.branch}"


def entry_point(path: Path) -> Path | None:
    """Executable entry of a module, or None if there is none."""
    if path.is_file():
        return path
    if path.is_dir():
        for name in ENTRY_POINTS:
            candidate = path / name
            if candidate.is_file():
                return candidate
    return None


class LocalInstaller:
    """Checks that a module is installed and launchable.

    A module is ready when its entry point exists and its optional
    ``module.json`` manifest parses and, if the descriptor pins a version,
    declares that version. Fetching missing modules is left to the package
    acquisition pipeline, so missing modules stay missing here.
    """

    def __init__(self, modules_path: Path | str = "modules") -> None:
        self.modules_path = Path(modules_path)

    def locate(self, descriptor: ModuleDescriptor) -> Path | None:
        return entry_point(module_path(descriptor, self.modules_path))

    def check(self, descriptor: ModuleDescriptor) -> InstallStatus:
        path = module_path(descriptor, self.modules_path)
        if self.locate(descriptor) is None:
            return InstallStatus.MISSING

        manifest_path = path / MANIFEST_NAME if path.is_dir() else path.parent / MANIFEST_NAME
        if not manifest_path.is_file():
            return InstallStatus.READY

        try:
            manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.error(
                f"Invalid `{MANIFEST_NAME}` [{descriptor.module_id}]: {e}",
                extra={"module_id": descriptor.module_id, "error": str(e)},
            )
            return InstallStatus.FAILED
        if not isinstance(manifest, dict):
            logger.error(
                f"Invalid `{MANIFEST_NAME}` [{descriptor.module_id}]: not an object",
                extra={"module_id": descriptor.module_id},
            )
            return InstallStatus.FAILED

        version = manifest.get("version")
        if descriptor.version is not None and version != descriptor.version:
            logger.error(
                f"Version mismatch [{descriptor.module_id}]: {version} != {descriptor.version}",
                extra={"module_id": descriptor.module_id},
            )
            return InstallStatus.FAILED
        return InstallStatus.READY

    async def ensure_installed(self, descriptor: ModuleDescriptor) -> InstallStatus:
        return await asyncio.to_thread(self.check, descriptor)
