"""System prompt and conversation assembly for one chat request."""

import asyncio
from typing import Iterable

from verifolio_chat.budget import Budget
from verifolio_chat.instructions import CONTEXT_TEMPLATE, SYSTEM_TEMPLATE, InstructionLoader
from verifolio_chat.llm import Message
from verifolio_chat.logging import get_logger
from verifolio_chat.schemas import ChatMode, ChatRequest, ContextId
from verifolio_chat.tools.backend import ToolBackend

log = get_logger(__name__)


class PromptBuilder:
    """Builds the system prompt: identity, mode rules and open-entity context.

    The entity summary comes from the tool backend. Fetching it is a
    suspension point like any other, so it is budget-checked and bounded by
    the tool timeout; any failure just leaves the context section out.
    """

    def __init__(
        self,
        loader: InstructionLoader | None = None,
        backend: ToolBackend | None = None,
        always_confirm: Iterable[str] = (),
    ):
        self.loader = loader or InstructionLoader()
        self.backend = backend
        self.always_confirm = sorted(always_confirm)

    async def _context_summary(self, context_id: ContextId, budget: Budget) -> str | None:
        if self.backend is None:
            return None
        budget.check("Context summary")
        try:
            return await asyncio.wait_for(
                self.backend.describe_context(context_id.type, context_id.id),
                timeout=budget.tool_timeout,
            )
        except asyncio.TimeoutError:
            log.warning("Context summary timed out", context=str(context_id))
        except Exception as e:
            log.warning("Context summary failed", context=str(context_id), error=str(e))
        return None

    async def build_system_prompt(
        self,
        mode: ChatMode,
        context_id: ContextId | None,
        budget: Budget,
    ) -> str:
        always_confirm = ", ".join(self.always_confirm) or "(aucune)"
        mode_instructions = self.loader.mode_instructions(mode.value, always_confirm=always_confirm)

        context_section = ""
        if context_id is not None and not context_id.is_global:
            summary = await self._context_summary(context_id, budget)
            if summary:
                context_section = self.loader.render(
                    CONTEXT_TEMPLATE,
                    context_type=context_id.type,
                    context_id=context_id.id,
                    context_summary=summary,
                )

        return self.loader.render(
            SYSTEM_TEMPLATE,
            mode_instructions=f"\n{mode_instructions}\n" if mode_instructions else "",
            context_section=f"\n{context_section}\n" if context_section else "",
        )

    async def build_messages(self, request: ChatRequest, budget: Budget) -> list[Message]:
        """System prompt, then history in order, then the new user message."""
        system_prompt = await self.build_system_prompt(request.mode, request.context_id, budget)
        messages = [Message(role="system", content=system_prompt)]
        messages.extend(Message(role=m.role, content=m.content) for m in request.history)
        messages.append(Message(role="user", content=request.message))
        return messages
