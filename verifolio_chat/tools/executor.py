"""Sequential execution of one model turn's tool calls."""

from dataclasses import dataclass
from typing import Any

from verifolio_chat.budget import Budget
from verifolio_chat.exceptions import ToolExecutionError, VerifolioChatError
from verifolio_chat.extraction import CreatedEntity, TabToOpen, extract_created_entity, extract_tab, step_label
from verifolio_chat.llm import Message, ToolCall
from verifolio_chat.logging import get_logger
from verifolio_chat.schemas import validate_tool_arguments, validate_tool_result
from verifolio_chat.tools.catalog import MUTATING_TOOLS
from verifolio_chat.tools.registry import ToolContext, ToolRegistry

log = get_logger(__name__)


@dataclass
class ToolExecutionResult:
    """Outcome of one tool call, correlated to the model by ``call_id``."""

    call_id: str
    tool_name: str
    result_message: str
    step_label: str
    success: bool = True
    entity_created: CreatedEntity | None = None
    tab_to_open: TabToOpen | None = None
    data: Any = None

    def as_tool_message(self) -> Message:
        return Message(role="tool", content=self.result_message, tool_call_id=self.call_id)


class ToolExecutor:
    """Run tool calls strictly in the order the model emitted them.

    Later calls may depend on what earlier ones created, so the first
    failure aborts the batch. The error raised carries the results that
    completed before it in ``partial_results``.
    """

    def __init__(self, registry: ToolRegistry):
        self.registry = registry

    async def execute(
        self,
        tool_calls: list[ToolCall],
        budget: Budget,
        context: ToolContext | None = None,
    ) -> list[ToolExecutionResult]:
        context = context or ToolContext()
        results: list[ToolExecutionResult] = []

        for tool_call in tool_calls:
            try:
                results.append(await self._execute_one(tool_call, budget, context))
            except VerifolioChatError as e:
                e.partial_results = list(results)
                log.error(
                    "Tool batch aborted",
                    tool=tool_call.name,
                    call_id=tool_call.id,
                    completed=len(results),
                    remaining=len(tool_calls) - len(results) - 1,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                raise
            except Exception as e:
                wrapped = ToolExecutionError(tool_call.name, str(e))
                wrapped.partial_results = list(results)
                log.error("Tool batch aborted", tool=tool_call.name, call_id=tool_call.id, error=str(e))
                raise wrapped from e

        return results

    async def _execute_one(
        self,
        tool_call: ToolCall,
        budget: Budget,
        context: ToolContext,
    ) -> ToolExecutionResult:
        budget.check(f"Tool {tool_call.name}")

        arguments = validate_tool_arguments(tool_call.name, tool_call.arguments)
        label = step_label(tool_call.name, arguments.model_dump(exclude_none=True))

        raw = await self.registry.dispatch(
            tool_call.name,
            context,
            arguments,
            timeout=budget.tool_timeout,
        )
        result = validate_tool_result(tool_call.name, raw)

        entity = None
        if tool_call.name in MUTATING_TOOLS and result.success:
            entity = extract_created_entity(tool_call.name, result.message)
            if entity is None:
                log.debug("No entity found in tool result", tool=tool_call.name)

        tab = extract_tab(result.data)

        log.info(
            "Tool completed",
            tool=tool_call.name,
            call_id=tool_call.id,
            success=result.success,
            entity=entity.id if entity else None,
            tab=tab.path if tab else None,
        )
        return ToolExecutionResult(
            call_id=tool_call.id,
            tool_name=tool_call.name,
            result_message=result.message,
            step_label=label,
            success=result.success,
            entity_created=entity,
            tab_to_open=tab,
            data=result.data,
        )
