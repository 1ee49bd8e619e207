"""In-memory module directory."""

from exobus.directory.base import ModuleDescriptor


class InMemoryModuleDirectory:
    """Module directory kept in a dict.

    Suitable for off-the-record sessions and testing: nothing survives the
    host process.
    """

    def __init__(self, descriptors: list[ModuleDescriptor] | None = None) -> None:
        self._modules: dict[str, ModuleDescriptor] = {}
        for descriptor in descriptors or []:
            self._modules[descriptor.module_id] = descriptor

    async def resolve(self, module_id: str) -> ModuleDescriptor | None:
        return self._modules.get(module_id)

    async def list(self) -> list[ModuleDescriptor]:
        return list(self._modules.values())

    async def add(self, descriptor: ModuleDescriptor) -> None:
        self._modules[descriptor.module_id] = descriptor

    async def remove(self, module_id: str) -> bool:
        return self._modules.pop(module_id, None) is not None

    def __len__(self) -> int:
        return len(self._modules)
