from __future__ import annotations

from typing import Iterator

from ..models import ToolDescriptor
from .base import Tool


class ToolAlreadyRegisteredError(ValueError):
    pass


class RegistryFrozenError(RuntimeError):
    pass


class ToolRegistry:
    """
    Name -> tool mapping.

    Populated at startup and then frozen; after `freeze()` it is read-only and shared by the
    session, the approval engine and the executor without locking.
    """

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}
        self._frozen = False

    def register(self, tool: Tool) -> None:
        if self._frozen:
            raise RegistryFrozenError("Tool registry is frozen; register tools before the session starts.")
        descriptor = tool.descriptor
        if not isinstance(descriptor, ToolDescriptor):
            raise TypeError(f"Tool {tool!r} does not expose a ToolDescriptor.")
        if descriptor.name in self._tools:
            raise ToolAlreadyRegisteredError(f"Tool already registered: {descriptor.name}")
        self._tools[descriptor.name] = tool

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def resolve(self, name: str) -> ToolDescriptor | None:
        tool = self._tools.get(name)
        return tool.descriptor if tool is not None else None

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [t.descriptor for t in self._tools.values()]

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def __iter__(self) -> Iterator[ToolDescriptor]:
        return iter(self.descriptors())
