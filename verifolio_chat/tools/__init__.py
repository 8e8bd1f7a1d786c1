"""Tools package for Verifolio Chat."""

from verifolio_chat.tools.catalog import (
    CATALOG,
    MUTATING_TOOLS,
    READ_ONLY_TOOLS,
    TOOL_SPECS,
    ToolArguments,
    ToolSpec,
)
from verifolio_chat.tools.registry import (
    SpecTool,
    Tool,
    ToolContext,
    ToolRegistry,
    ToolResult,
)
from verifolio_chat.tools.backend import (
    BackendTool,
    HttpToolBackend,
    ToolBackend,
    build_registry,
)

__all__ = [
    "CATALOG",
    "MUTATING_TOOLS",
    "READ_ONLY_TOOLS",
    "TOOL_SPECS",
    "ToolArguments",
    "ToolSpec",
    "SpecTool",
    "Tool",
    "ToolContext",
    "ToolRegistry",
    "ToolResult",
    "BackendTool",
    "HttpToolBackend",
    "ToolBackend",
    "build_registry",
]
