"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from verifolio_chat.exceptions import ToolExecutionError, ToolNotFoundError, ToolTimeoutError
from verifolio_chat.logging import get_logger
from verifolio_chat.tools.catalog import ToolArguments, ToolSpec, json_schema

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result contract every tool must honour."""

    success: bool
    message: str
    data: dict[str, Any] | list[Any] | None = None


@dataclass(frozen=True)
class ToolContext:
    """Who is asking and from where; handed to every tool call."""

    user_id: str | None = None
    context_id: str | None = None
    mode: str = "auto"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    arguments_model: type[ToolArguments] = ToolArguments
    read_only: bool = False
    timeout_seconds: float | None = None

    @abstractmethod
    async def execute(self, context: ToolContext, arguments: ToolArguments) -> Any:
        """Execute the tool.

        Args:
            context: Caller identity and open entity
            arguments: Validated arguments

        Returns:
            Raw result payload, expected to match ``ToolResult``
        """
        pass

    def get_definition(self) -> dict[str, Any]:
        """Get the tool definition for LLM.

        Returns:
            OpenAI function-style definition
        """
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": json_schema(self.arguments_model),
            },
        }


class SpecTool(Tool):
    """Tool declared by a catalog ``ToolSpec``; subclasses supply ``execute``."""

    def __init__(self, spec: ToolSpec):
        self.spec = spec
        self.name = spec.name
        self.description = spec.description
        self.arguments_model = spec.arguments
        self.read_only = spec.read_only


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self, *, read_only: bool = False) -> list[str]:
        """List registered tool names, optionally only the read-only ones."""
        return [
            tool.name
            for tool in self._tools.values()
            if tool.read_only or not read_only
        ]

    def get_definitions(self, *, read_only: bool = False) -> list[dict[str, Any]]:
        """Get tool definitions for LLM.

        Returns:
            List of OpenAI function-style definitions
        """
        return [
            self._tools[name].get_definition()
            for name in self.list_tools(read_only=read_only)
        ]

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
        """Cancel task and await it to avoid pending task warnings."""
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            log.debug("Cancelled tool task raised", error=str(e))

    async def dispatch(
        self,
        name: str,
        context: ToolContext,
        arguments: ToolArguments,
        timeout: float,
    ) -> Any:
        """Run one tool under a timeout race.

        Args:
            name: Tool name
            context: Caller context
            arguments: Validated arguments
            timeout: Default per-tool timeout; a tool's own ``timeout_seconds`` wins

        Returns:
            Raw payload returned by the tool

        Raises:
            ToolNotFoundError if tool not found
            ToolTimeoutError if the timer wins the race
            ToolExecutionError if the tool raises
        """
        tool = self.get(name)
        timeout_seconds = float(tool.timeout_seconds or timeout)

        execute_task: asyncio.Task[Any] | None = None
        try:
            log.info("Executing tool", tool=name)
            execute_task = asyncio.create_task(tool.execute(context, arguments))
            done, _ = await asyncio.wait({execute_task}, timeout=timeout_seconds)

            if execute_task in done:
                return execute_task.result()

            await self._cancel_task(execute_task)
            raise ToolTimeoutError(name, timeout_seconds)
        except asyncio.CancelledError:
            await self._cancel_task(execute_task)
            raise
        except (ToolTimeoutError, ToolExecutionError):
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))
