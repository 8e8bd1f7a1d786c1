"""Mode-based permission policy for tool calls."""

from enum import Enum
from typing import Iterable

from verifolio_chat.exceptions import ConfirmationRequiredError, ForbiddenToolError
from verifolio_chat.llm import ToolCall
from verifolio_chat.logging import get_logger
from verifolio_chat.schemas import ChatMode, ChatRequest, decode_tool_arguments
from verifolio_chat.tools.catalog import READ_ONLY_TOOLS, TOOL_SPECS

log = get_logger(__name__)


class PermissionDecision(str, Enum):
    ALLOWED = "allowed"
    NEEDS_CONFIRMATION = "needs_confirmation"
    FORBIDDEN = "forbidden"


class PermissionGate:
    """Fixed policy table: (mode, tool) -> decision.

    ``plan`` only runs read-only tools. ``auto`` runs everything except the
    tools listed in ``always_confirm``. ``ask-first`` asks before every
    mutating tool. A confirmation only counts for the exact tool call id
    the user approved.
    """

    def __init__(
        self,
        read_only_tools: Iterable[str] = READ_ONLY_TOOLS,
        known_tools: Iterable[str] = TOOL_SPECS.keys(),
        always_confirm: Iterable[str] = (),
    ):
        self.read_only_tools = frozenset(read_only_tools)
        self.known_tools = frozenset(known_tools)
        self.always_confirm = frozenset(always_confirm)

    def decide(self, mode: ChatMode, tool_name: str, *, confirmed: bool = False) -> PermissionDecision:
        if tool_name not in self.known_tools:
            return PermissionDecision.FORBIDDEN

        read_only = tool_name in self.read_only_tools
        if mode is ChatMode.PLAN:
            return PermissionDecision.ALLOWED if read_only else PermissionDecision.FORBIDDEN

        if read_only or confirmed:
            return PermissionDecision.ALLOWED

        if mode is ChatMode.ASK_FIRST or tool_name in self.always_confirm:
            return PermissionDecision.NEEDS_CONFIRMATION
        return PermissionDecision.ALLOWED

    def tools_restricted_to_read_only(self, mode: ChatMode) -> bool:
        """Whether only read-only tool definitions are offered to the model."""
        return mode is ChatMode.PLAN

    @staticmethod
    def is_confirmed(request: ChatRequest, tool_call: ToolCall) -> bool:
        return bool(
            request.confirmed_action
            and request.confirmed_tool_call_id
            and request.confirmed_tool_call_id == tool_call.id
        )

    def check(self, request: ChatRequest, tool_calls: list[ToolCall]) -> None:
        """Gate a whole model turn before any of it runs.

        Raises:
            ForbiddenToolError or ConfirmationRequiredError for the first
            call that is not allowed
        """
        for tool_call in tool_calls:
            decision = self.decide(
                request.mode,
                tool_call.name,
                confirmed=self.is_confirmed(request, tool_call),
            )
            log.info(
                "Tool permission",
                tool=tool_call.name,
                call_id=tool_call.id,
                mode=request.mode.value,
                decision=decision.value,
            )
            if decision is PermissionDecision.FORBIDDEN:
                raise ForbiddenToolError(request.mode.value, tool_call.name)
            if decision is PermissionDecision.NEEDS_CONFIRMATION:
                raise ConfirmationRequiredError(
                    request.mode.value,
                    tool_call.name,
                    tool_call.id,
                    decode_tool_arguments(tool_call.arguments),
                )


_default_gate = PermissionGate()


def decide(mode: ChatMode, tool_name: str, *, confirmed: bool = False) -> PermissionDecision:
    """Decision under the default policy (no ``always_confirm`` tools)."""
    return _default_gate.decide(mode, tool_name, confirmed=confirmed)
