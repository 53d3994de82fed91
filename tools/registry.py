"""Tool registry.

A tool is a name, an OpenAI function schema and an async handler::

    async def handler(args: dict, token: CancellationToken) -> str

Handlers return the text fed back to the model, or raise
``ToolExecutionFailed`` (optionally carrying partial output and metadata
such as an exit code). Anything else they raise is reported as a failure
by the executor; nothing escapes into the conversation.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], Any], Awaitable[str]]


@dataclass
class ToolSpec:
    name: str
    description: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    required: List[str] = field(default_factory=list)
    kind: str = "local"  # "local" | "mcp"
    handler: Optional[ToolHandler] = None
    # asks the user first unless the executor runs without a permission gate
    needs_permission: bool = False

    def to_openai_schema(self) -> Dict[str, Any]:
        """Convert to OpenAI-compatible function schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": {
                    "type": "object",
                    "properties": self.parameters,
                    "required": self.required,
                },
            },
        }


class ToolRegistry:
    """Registry of available tools."""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> None:
        if spec.name in self._tools:
            logger.debug("Replacing registered tool %s", spec.name)
        self._tools[spec.name] = spec

    def unregister(self, name: str) -> bool:
        return self._tools.pop(name, None) is not None

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def names(self, kind: Optional[str] = None) -> List[str]:
        return sorted(n for n, s in self._tools.items() if kind is None or s.kind == kind)

    def schemas(self, names: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
        """OpenAI tool schemas for *names* (all tools when None).

        Unknown names are skipped with a warning so a stale config does not
        break a conversation.
        """
        if names is None:
            selected = [self._tools[n] for n in sorted(self._tools)]
        else:
            selected = []
            for name in names:
                spec = self._tools.get(name)
                if spec is None:
                    logger.warning("Configured tool %s is not registered", name)
                    continue
                selected.append(spec)
        return [s.to_openai_schema() for s in selected]

    def copy(self) -> "ToolRegistry":
        clone = ToolRegistry()
        clone._tools = dict(self._tools)
        return clone

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """Copy holding only *names*; unknown names are skipped with a warning."""
        clone = ToolRegistry()
        for name in names:
            spec = self._tools.get(name)
            if spec is None:
                logger.warning("Configured tool %s is not registered", name)
                continue
            clone._tools[name] = spec
        return clone


def default_registry() -> ToolRegistry:
    """Registry holding the built-in local tools."""
    from tools.file_tools import FILE_TOOLS
    from tools.shell_tool import TERMINAL_TOOL

    registry = ToolRegistry()
    registry.register(TERMINAL_TOOL)
    for spec in FILE_TOOLS:
        registry.register(spec)
    return registry
