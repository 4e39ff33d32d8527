"""
Explicit tool-name -> handler registry.

Built once at startup from the static catalog; a catalog entry without a
handler fails the build instead of failing mid-call.
"""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping

import structlog
from pydantic import BaseModel, ValidationError

from src.callflow.config import Config
from src.callflow.errors import ToolArgumentsError, ToolRegistryError, UnknownToolError
from src.callflow.tools.catalog import CATALOG, ToolDescriptor

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class ToolContext:
    """Per-call information a tool body may need."""
    call_sid: str
    config: Config


ToolHandler = Callable[[BaseModel, ToolContext], Awaitable[BaseModel]]


@dataclass(frozen=True)
class RegisteredTool:
    descriptor: ToolDescriptor
    handler: ToolHandler


class ToolRegistry:
    """Read-only mapping shared by every call session."""

    def __init__(self, tools: Iterable[RegisteredTool]):
        self._tools: Dict[str, RegisteredTool] = {t.descriptor.name: t for t in tools}

    @classmethod
    def from_catalog(
        cls,
        catalog: Iterable[ToolDescriptor],
        handlers: Mapping[str, ToolHandler],
    ) -> "ToolRegistry":
        catalog = list(catalog)
        missing = [d.name for d in catalog if d.name not in handlers]
        if missing:
            raise ToolRegistryError(f"No handler registered for tools: {', '.join(missing)}")

        names = [d.name for d in catalog]
        if len(set(names)) != len(names):
            raise ToolRegistryError("Duplicate tool names in catalog")

        extra = sorted(set(handlers) - set(names))
        if extra:
            logger.warning("Handlers registered for tools outside the catalog", tools=extra)

        return cls(RegisteredTool(descriptor=d, handler=handlers[d.name]) for d in catalog)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def get(self, name: str) -> RegisteredTool:
        try:
            return self._tools[name]
        except KeyError:
            raise UnknownToolError(name) from None

    def definitions(self) -> List[dict[str, Any]]:
        """Tool definitions for the chat completions request."""
        return [t.descriptor.to_openai_tool() for t in self._tools.values()]

    def validate_arguments(self, name: str, arguments: Dict[str, Any]) -> BaseModel:
        tool = self.get(name)
        try:
            return tool.descriptor.parameters.model_validate(arguments)
        except ValidationError as e:
            raise ToolArgumentsError(f"Invalid arguments for {name}: {e}") from e

    async def invoke(self, name: str, arguments: BaseModel, context: ToolContext) -> str:
        """Run the tool and return its result serialized as JSON text."""
        tool = self.get(name)
        result = await tool.handler(arguments, context)
        if isinstance(result, BaseModel):
            return result.model_dump_json(by_alias=True)
        return tool.descriptor.returns.model_validate(result).model_dump_json(by_alias=True)


@lru_cache(maxsize=1)
def get_registry() -> ToolRegistry:
    """Build (once) the registry for the shipped catalog."""
    from src.callflow.tools.handlers import HANDLERS

    registry = ToolRegistry.from_catalog(CATALOG, HANDLERS)
    logger.info("Tool registry ready", tools=registry.names)
    return registry
