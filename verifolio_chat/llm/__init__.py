"""OpenAI-compatible chat completions provider - direct HTTP calls."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Literal

import httpx

from verifolio_chat.config import ModelConfig
from verifolio_chat.exceptions import ModelTimeoutError, NetworkError, UpstreamError
from verifolio_chat.logging import get_logger

log = get_logger(__name__)


ToolChoice = Literal["auto", "required", "none"]


@dataclass
class ToolCall:
    """A tool call from the LLM.

    ``arguments`` is kept exactly as the provider sent it (usually a JSON
    string); the schema validator decodes and checks it before execution.
    """

    id: str
    name: str
    arguments: dict[str, Any] | str = field(default_factory=dict)

    def to_wire(self) -> dict[str, Any]:
        raw = self.arguments if isinstance(self.arguments, str) else json.dumps(self.arguments, ensure_ascii=False)
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": raw},
        }


@dataclass
class Message:
    """A message in the conversation."""

    role: str  # "system", "user", "assistant", "tool"
    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_call_id: str | None = None

    def to_wire(self) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            entry["tool_calls"] = [tc.to_wire() for tc in self.tool_calls]
        if self.tool_call_id:
            entry["tool_call_id"] = self.tool_call_id
        return entry


@dataclass
class ModelReply:
    """Response from the LLM (first choice only)."""

    content: str | None
    tool_calls: list[ToolCall] = field(default_factory=list)
    finish_reason: str | None = None
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)

    def as_assistant_message(self) -> Message:
        return Message(role="assistant", content=self.content, tool_calls=list(self.tool_calls))


class UpstreamStream:
    """An open upstream byte stream, closed exactly once."""

    def __init__(
        self,
        chunks: AsyncIterator[bytes],
        close: Callable[[], Awaitable[None]] | None = None,
        label: str = "stream",
    ):
        self._chunks = chunks
        self._close = close
        self._closed = False
        self.label = label

    @classmethod
    def from_response(cls, response: httpx.Response, label: str) -> "UpstreamStream":
        return cls(response.aiter_bytes(), response.aclose, label=label)

    def __aiter__(self) -> AsyncIterator[bytes]:
        return self._chunks

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._close is not None:
            await self._close()


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    async def complete(
        self,
        messages: list[Message],
        *,
        tool_choice: ToolChoice = "auto",
        tools: list[dict[str, Any]] | None = None,
        timeout: float,
        label: str,
    ) -> ModelReply:
        pass

    @abstractmethod
    async def open_stream(
        self,
        messages: list[Message],
        *,
        timeout: float,
        label: str,
    ) -> UpstreamStream:
        pass

    async def close(self) -> None:
        return None


class OpenAIChatClient(LLMProvider):
    """Chat Completions provider over httpx.

    Every request is raced against the caller's timeout; when the timer
    wins, the in-flight request task is cancelled, which makes httpx drop
    the connection instead of leaving it checked out.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = "https://api.openai.com/v1",
        api_key: str = "",
        temperature: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature

        # Per-call deadlines are enforced by complete()/open_stream().
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(None, connect=10.0),
            follow_redirects=True,
            transport=transport,
        )

    @property
    def url(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _build_body(
        self,
        messages: list[Message],
        tool_choice: ToolChoice,
        tools: list[dict[str, Any]] | None,
        stream: bool,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [m.to_wire() for m in messages],
        }
        if self.temperature is not None:
            body["temperature"] = self.temperature
        # Tools only travel with the request when the model may use them
        if tool_choice != "none" and tools:
            body["tools"] = tools
            body["tool_choice"] = tool_choice
        if stream:
            body["stream"] = True
        return body

    @staticmethod
    def _upstream_error(response: httpx.Response, label: str) -> UpstreamError:
        upstream_message: str | None = None
        try:
            payload = response.json()
            if isinstance(payload, dict) and isinstance(payload.get("error"), dict):
                upstream_message = payload["error"].get("message") or None
        except ValueError:
            log.error("Upstream error body is not JSON", label=label, status=response.status_code)
        log.error(
            "Upstream model error",
            label=label,
            status=response.status_code,
            upstream_message=upstream_message,
        )
        return UpstreamError(
            f"{label}: upstream status {response.status_code}",
            status_code=response.status_code,
            upstream_message=upstream_message,
        )

    @staticmethod
    def _parse_reply(data: Any) -> ModelReply:
        choices = data.get("choices") if isinstance(data, dict) else None
        if not isinstance(choices, list) or not choices:
            raise UpstreamError("empty reply")

        choice = choices[0]
        if not isinstance(choice, dict):
            raise UpstreamError("malformed reply: choice is not an object")
        message = choice.get("message") or {}
        if not isinstance(message, dict):
            raise UpstreamError("malformed reply: message is not an object")

        tool_calls = []
        for tc in message.get("tool_calls") or []:
            if not isinstance(tc, dict):
                raise UpstreamError("malformed reply: tool call is not an object")
            function = tc.get("function") or {}
            if not isinstance(function, dict):
                raise UpstreamError("malformed reply: tool call function is not an object")
            tool_calls.append(ToolCall(
                id=str(tc.get("id", "")),
                name=str(function.get("name", "")),
                arguments=function.get("arguments", "{}"),
            ))

        return ModelReply(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason"),
            model=str(data.get("model", "")),
            usage=dict(data.get("usage") or {}),
        )

    async def complete(
        self,
        messages: list[Message],
        *,
        tool_choice: ToolChoice = "auto",
        tools: list[dict[str, Any]] | None = None,
        timeout: float,
        label: str,
    ) -> ModelReply:
        """Issue one bounded completion call."""
        body = self._build_body(messages, tool_choice, tools, stream=False)
        log.debug("Calling model", label=label, model=self.model, msg_count=len(messages), tool_choice=tool_choice)

        try:
            response = await asyncio.wait_for(
                self.client.post(self.url, json=body, headers=self._headers()),
                timeout=timeout,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.warning("Model call timed out", label=label, timeout=timeout)
            raise ModelTimeoutError(label)
        except httpx.HTTPError as e:
            raise NetworkError(f"{label}: {e}")

        if not response.is_success:
            raise self._upstream_error(response, label)

        try:
            data = response.json()
        except ValueError as e:
            raise UpstreamError(f"{label}: undecodable reply: {e}", status_code=response.status_code)

        reply = self._parse_reply(data)
        log.debug("Model replied", label=label, tool_calls=len(reply.tool_calls), finish_reason=reply.finish_reason)
        return reply

    async def open_stream(
        self,
        messages: list[Message],
        *,
        timeout: float,
        label: str,
    ) -> UpstreamStream:
        """Open a streaming completion; only the response headers are awaited here."""
        body = self._build_body(messages, "none", None, stream=True)
        request = self.client.build_request("POST", self.url, json=body, headers=self._headers())

        try:
            response = await asyncio.wait_for(self.client.send(request, stream=True), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            log.warning("Model stream open timed out", label=label, timeout=timeout)
            raise ModelTimeoutError(label)
        except httpx.HTTPError as e:
            raise NetworkError(f"{label}: {e}")

        if not response.is_success:
            try:
                await response.aread()
            finally:
                await response.aclose()
            raise self._upstream_error(response, label)

        return UpstreamStream.from_response(response, label)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(config: ModelConfig, transport: httpx.AsyncBaseTransport | None = None) -> LLMProvider:
    """Create the upstream provider from model configuration."""
    return OpenAIChatClient(
        model=config.model,
        base_url=config.base_url,
        api_key=config.api_key,
        temperature=config.temperature,
        transport=transport,
    )
