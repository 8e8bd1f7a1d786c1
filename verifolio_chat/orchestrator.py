"""Round controller for one chat request.

A request moves through a small state machine::

    INIT -> [PERMISSION -> TOOL_ROUND -> FOLLOW_UP]* -> (RETRY_CHECK -> RETRY_ROUND)? -> FINAL

``_tool_round`` is the single transition used for the first round, the
second round and the retry round. Model calls whose failure can be
absorbed (follow-up, retry, final answer) go through ``_attempt`` and come
back as a ``CallResult``; everything else propagates as a typed exception
for the web layer to map.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncGenerator, Callable

from verifolio_chat.budget import Budget, ChatLimits
from verifolio_chat.exceptions import (
    BudgetExceededError,
    ChatTimeoutError,
    NetworkError,
    UpstreamError,
    VerifolioChatError,
)
from verifolio_chat.extraction import CreatedEntity, TabToOpen
from verifolio_chat.llm import LLMProvider, Message, ModelReply, ToolChoice, UpstreamStream
from verifolio_chat.logging import get_logger
from verifolio_chat.permissions import PermissionGate
from verifolio_chat.prompts import PromptBuilder
from verifolio_chat.retry import refusal_reason
from verifolio_chat.schemas import ChatRequest
from verifolio_chat.streaming import StreamEvent, StreamingAdapter
from verifolio_chat.tools.executor import ToolExecutionResult, ToolExecutor
from verifolio_chat.tools.registry import ToolContext, ToolRegistry

log = get_logger(__name__)

DEFAULT_REPLY = "Je suis prêt à vous aider. Que souhaitez-vous faire ?"

# Failures a degradable call site absorbs. BudgetExceededError is a
# ChatTimeoutError but is always re-raised first.
_DEGRADABLE_ERRORS = (UpstreamError, NetworkError, ChatTimeoutError)


class RoundPhase(str, Enum):
    INIT = "init"
    PERMISSION = "permission"
    TOOL_ROUND = "tool_round"
    FOLLOW_UP = "follow_up"
    RETRY_CHECK = "retry_check"
    RETRY_ROUND = "retry_round"
    FINAL = "final"


@dataclass
class CallResult:
    """Outcome of a model call whose failure the controller can absorb."""

    reply: ModelReply | None = None
    error: VerifolioChatError | None = None

    @property
    def ok(self) -> bool:
        return self.reply is not None


@dataclass
class ChatResponse:
    """Materialized answer for a non-streaming request."""

    message: str
    working_steps: list[str] = field(default_factory=list)
    entities_created: list[CreatedEntity] = field(default_factory=list)
    tabs_to_open: list[TabToOpen] = field(default_factory=list)
    degraded: bool = False

    def metadata(self) -> dict[str, Any]:
        return {
            "workingSteps": list(self.working_steps),
            "entitiesCreated": [e.to_json() for e in self.entities_created],
            "tabsToOpen": [t.to_json() for t in self.tabs_to_open],
        }

    def to_json(self) -> dict[str, Any]:
        body: dict[str, Any] = {"message": self.message}
        # Empty lists are left out of the body.
        body.update({key: value for key, value in self.metadata().items() if value})
        return body


@dataclass
class StreamingChatResponse:
    """Answer delivered as SSE events; ``events`` is consumed exactly once."""

    events: AsyncGenerator[StreamEvent, None]


ChatOutcome = ChatResponse | StreamingChatResponse


@dataclass(eq=False)
class _RunState:
    request: ChatRequest
    budget: Budget
    context: ToolContext
    tools: list[dict[str, Any]]
    messages: list[Message] = field(default_factory=list)
    phase: RoundPhase = RoundPhase.INIT
    working_steps: list[str] = field(default_factory=list)
    entities: list[CreatedEntity] = field(default_factory=list)
    tabs: list[TabToOpen] = field(default_factory=list)
    last_results: list[ToolExecutionResult] = field(default_factory=list)
    retried: bool = False
    degraded: bool = False

    def record(self, results: list[ToolExecutionResult]) -> None:
        self.last_results = results
        for result in results:
            self.working_steps.append(result.step_label)
            entity = result.entity_created
            if entity is not None and not any(
                (e.type, e.id) == (entity.type, entity.id) for e in self.entities
            ):
                self.entities.append(entity)
            if result.tab_to_open is not None:
                self.tabs.append(result.tab_to_open)

    def raw_results(self) -> str:
        return "\n\n".join(r.result_message for r in self.last_results)

    def response(self, message: str) -> ChatResponse:
        return ChatResponse(
            message=message,
            working_steps=list(self.working_steps),
            entities_created=list(self.entities),
            tabs_to_open=list(self.tabs),
            degraded=self.degraded,
        )


class ChatOrchestrator:
    """Drives model calls and tool rounds for one request at a time.

    Holds only immutable collaborators; every request gets its own
    ``Budget`` and ``_RunState``, so one instance serves concurrent
    requests.
    """

    def __init__(
        self,
        provider: LLMProvider,
        registry: ToolRegistry,
        gate: PermissionGate | None = None,
        limits: ChatLimits | None = None,
        prompt_builder: PromptBuilder | None = None,
        executor: ToolExecutor | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.provider = provider
        self.registry = registry
        self.gate = gate or PermissionGate()
        self.limits = limits or ChatLimits()
        self.prompt_builder = prompt_builder or PromptBuilder()
        self.executor = executor or ToolExecutor(registry)
        self.clock = clock

    # ── Entry point ─────────────────────────────────────────────────

    async def run(self, request: ChatRequest, user_id: str | None = None) -> ChatOutcome:
        """Answer one validated request.

        Raises:
            ToolPermissionError when a tool call needs confirmation or is forbidden
            VerifolioChatError subclasses for every unrecovered failure
        """
        budget = Budget(self.limits, clock=self.clock)
        read_only = self.gate.tools_restricted_to_read_only(request.mode)
        state = _RunState(
            request=request,
            budget=budget,
            context=ToolContext(
                user_id=user_id,
                context_id=str(request.context_id) if request.context_id else None,
                mode=request.mode.value,
            ),
            tools=self.registry.get_definitions(read_only=read_only),
        )
        log.info(
            "Chat request",
            mode=request.mode.value,
            context=state.context.context_id or "global",
            stream=request.stream,
            history=len(request.history),
            tools=len(state.tools),
        )

        try:
            return await self._drive(state)
        except VerifolioChatError as e:
            log.warning("Chat request stopped", phase=state.phase.value, error_type=type(e).__name__)
            raise

    async def _drive(self, state: _RunState) -> ChatOutcome:
        budget = state.budget
        state.messages = await self.prompt_builder.build_messages(state.request, budget)
        reply = await self._complete(state, "initial", "auto")

        while True:
            if reply.tool_calls:
                await self._tool_round(state, reply, retry=state.retried)
                if state.retried or budget.tool_rounds >= self.limits.max_tool_rounds:
                    return await self._final(state)

                state.phase = RoundPhase.FOLLOW_UP
                follow_up = await self._attempt(state, "follow-up", "auto")
                if not follow_up.ok:
                    state.degraded = True
                    return self._materialize(state, state.raw_results())
                reply = follow_up.reply
                continue

            retry = await self._retry_check(state, reply)
            if retry is not None:
                reply = retry
                continue

            text = reply.content or state.raw_results() or DEFAULT_REPLY
            return self._materialize(state, text)

    # ── Transitions ─────────────────────────────────────────────────

    async def _tool_round(self, state: _RunState, reply: ModelReply, *, retry: bool) -> None:
        """Gate, execute and feed back one model turn's tool calls."""
        state.phase = RoundPhase.PERMISSION
        self.gate.check(state.request, reply.tool_calls)

        state.phase = RoundPhase.RETRY_ROUND if retry else RoundPhase.TOOL_ROUND
        round_number = state.budget.claim_tool_round(retry=retry)
        log.info(
            "Tool round",
            round=round_number,
            retry=retry,
            calls=[tc.name for tc in reply.tool_calls],
        )

        results = await self.executor.execute(reply.tool_calls, state.budget, state.context)

        state.messages.append(reply.as_assistant_message())
        state.messages.extend(result.as_tool_message() for result in results)
        state.record(results)

    async def _retry_check(self, state: _RunState, reply: ModelReply) -> ModelReply | None:
        """Forced tool-use retry after a refusal; ``None`` keeps the answer as is."""
        if state.retried or not state.tools:
            return None
        reason = refusal_reason(reply.content)
        if reason is None:
            return None

        state.phase = RoundPhase.RETRY_CHECK
        state.retried = True
        log.info("Refusal detected, retrying with required tools", pattern=reason)

        retry = await self._attempt(state, "retry", "required")
        if not retry.ok:
            return None
        if not retry.reply.tool_calls:
            log.info("Retry produced no tool calls, keeping original answer")
            return None
        return retry.reply

    async def _final(self, state: _RunState) -> ChatOutcome:
        """Closing ``tool_choice=none`` call after the last tool round."""
        state.phase = RoundPhase.FINAL

        if state.request.stream:
            stream = await self._open_stream(state)
            if stream is not None:
                adapter = StreamingAdapter(state.budget.model_timeout, state.budget)
                return StreamingChatResponse(adapter.events(stream, self._metadata(state)))

        final = await self._attempt(state, "final", "none")
        text = final.reply.content if final.ok else None
        if not text:
            state.degraded = state.degraded or not final.ok
            text = state.raw_results()
        return self._materialize(state, text)

    def _materialize(self, state: _RunState, text: str) -> ChatOutcome:
        state.phase = RoundPhase.FINAL
        response = state.response(text)
        log.info(
            "Chat answered",
            steps=len(response.working_steps),
            entities=len(response.entities_created),
            tabs=len(response.tabs_to_open),
            degraded=response.degraded,
            elapsed=round(state.budget.elapsed(), 3),
        )
        if state.request.stream:
            return StreamingChatResponse(StreamingAdapter.replay(text, self._metadata(state)))
        return response

    @staticmethod
    def _metadata(state: _RunState) -> dict[str, Any]:
        return state.response("").metadata()

    # ── Model calls ─────────────────────────────────────────────────

    async def _complete(self, state: _RunState, label: str, tool_choice: ToolChoice) -> ModelReply:
        state.budget.check(label)
        return await self.provider.complete(
            state.messages,
            tool_choice=tool_choice,
            tools=state.tools,
            timeout=state.budget.model_timeout,
            label=label,
        )

    async def _attempt(self, state: _RunState, label: str, tool_choice: ToolChoice) -> CallResult:
        try:
            return CallResult(reply=await self._complete(state, label, tool_choice))
        except BudgetExceededError:
            raise
        except _DEGRADABLE_ERRORS as e:
            log.warning(
                "Model call failed, degrading",
                label=label,
                phase=state.phase.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            return CallResult(error=e)

    async def _open_stream(self, state: _RunState) -> UpstreamStream | None:
        label = "final stream"
        state.budget.check(label)
        try:
            return await self.provider.open_stream(
                state.messages,
                timeout=state.budget.model_timeout,
                label=label,
            )
        except BudgetExceededError:
            raise
        except _DEGRADABLE_ERRORS as e:
            log.warning(
                "Stream unavailable, falling back to a single reply",
                phase=state.phase.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            return None
