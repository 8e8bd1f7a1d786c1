"""Request, tool-argument and tool-result contracts."""

import json
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from verifolio_chat.exceptions import InvalidToolArguments, InvalidToolResult, RequestValidationError
from verifolio_chat.tools.catalog import TOOL_SPECS, ToolArguments
from verifolio_chat.tools.registry import ToolResult


class ChatMode(str, Enum):
    """Operating mode chosen by the user."""

    AUTO = "auto"
    PLAN = "plan"
    ASK_FIRST = "ask-first"


MODE_ALIASES = {"demander": "ask-first", "ask_first": "ask-first"}

ContextType = Literal[
    "dashboard", "deal", "mission", "invoice", "quote",
    "client", "contact", "proposal", "brief", "review", "settings",
]

_FIELD_MESSAGES = {
    "message": "Message requis",
    "contextId": "ContextId invalide",
}


class ContextId(BaseModel):
    """Reference to the entity open next to the chat."""

    model_config = ConfigDict(frozen=True)

    type: ContextType
    id: str = Field(min_length=1)

    @classmethod
    def parse(cls, raw: str) -> "ContextId":
        """Parse ``"<type>:<id>"``; the id may itself contain colons."""
        context_type, _, context_id = raw.partition(":")
        return cls(type=context_type, id=context_id)

    @property
    def is_global(self) -> bool:
        return self.type == "dashboard"

    def __str__(self) -> str:
        return f"{self.type}:{self.id}"


class HistoryMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str


class ChatRequest(BaseModel):
    """Validated ``POST /chat`` body."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    message: str
    history: list[HistoryMessage] = Field(default_factory=list)
    mode: ChatMode = ChatMode.AUTO
    context_id: ContextId | None = Field(default=None, alias="contextId")
    confirmed_action: bool = Field(default=False, alias="confirmedAction")
    confirmed_tool_call_id: str | None = Field(default=None, alias="confirmedToolCallId")
    stream: bool = False

    @field_validator("message")
    @classmethod
    def _require_message(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("message must not be empty")
        return value

    @field_validator("history", mode="before")
    @classmethod
    def _default_history(cls, value: Any) -> Any:
        return [] if value is None else value

    @field_validator("mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value: Any) -> Any:
        if value is None:
            return ChatMode.AUTO
        if isinstance(value, str):
            lowered = value.strip().lower()
            return MODE_ALIASES.get(lowered, lowered)
        return value

    @field_validator("context_id", mode="before")
    @classmethod
    def _parse_context_id(cls, value: Any) -> Any:
        if value is None or value == "":
            return None
        if isinstance(value, str):
            try:
                return ContextId.parse(value)
            except PydanticValidationError:
                raise ValueError("expected '<type>:<id>' with a known entity type")
        return value


def parse_chat_request(raw: Any) -> ChatRequest:
    """Validate a decoded JSON body.

    Raises:
        RequestValidationError with the offending field path
    """
    if not isinstance(raw, dict):
        raise RequestValidationError("", "request body must be a JSON object")
    try:
        return ChatRequest.model_validate(raw)
    except PydanticValidationError as e:
        error = e.errors()[0]
        loc = ".".join(str(part) for part in error.get("loc", ()))
        top = loc.split(".", 1)[0]
        raise RequestValidationError(
            loc,
            error.get("msg", "invalid value"),
            user_message=_FIELD_MESSAGES.get(top),
        )


def decode_tool_arguments(raw: Any) -> dict[str, Any]:
    """Best-effort decode of provider arguments; ``{}`` when unusable."""
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str) and raw.strip():
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError:
            return {}
        return decoded if isinstance(decoded, dict) else {}
    return {}


def validate_tool_arguments(tool_name: str, raw: Any) -> ToolArguments:
    """Decode and check tool-call arguments against the tool's model."""
    spec = TOOL_SPECS.get(tool_name)
    if spec is None:
        raise InvalidToolArguments(tool_name, "unknown tool")

    if isinstance(raw, str):
        if not raw.strip():
            raw = {}
        else:
            try:
                raw = json.loads(raw)
            except json.JSONDecodeError as e:
                raise InvalidToolArguments(tool_name, f"arguments are not valid JSON: {e.msg}")
    if not isinstance(raw, dict):
        raise InvalidToolArguments(tool_name, "arguments must be a JSON object")

    try:
        return spec.arguments.model_validate(raw)
    except PydanticValidationError as e:
        error = e.errors()[0]
        loc = ".".join(str(part) for part in error.get("loc", ()))
        raise InvalidToolArguments(tool_name, f"{loc}: {error.get('msg', 'invalid value')}")


def validate_tool_result(tool_name: str, raw: Any) -> ToolResult:
    """Check a tool payload against ``{success, message, data?}``."""
    if isinstance(raw, ToolResult):
        return raw
    if not isinstance(raw, dict):
        raise InvalidToolResult(tool_name, f"expected an object, got {type(raw).__name__}")
    try:
        return ToolResult.model_validate(raw)
    except PydanticValidationError as e:
        error = e.errors()[0]
        loc = ".".join(str(part) for part in error.get("loc", ()))
        raise InvalidToolResult(tool_name, f"{loc}: {error.get('msg', 'invalid value')}")
