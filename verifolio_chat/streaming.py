"""Translate an upstream completion stream into downstream SSE events."""

import asyncio
import codecs
import json
from dataclasses import dataclass, field
from typing import Any, AsyncIterator

from verifolio_chat.budget import Budget
from verifolio_chat.exceptions import BudgetExceededError, ModelTimeoutError
from verifolio_chat.llm import UpstreamStream
from verifolio_chat.logging import get_logger

log = get_logger(__name__)

STREAM_ERROR_MESSAGE = "Erreur de streaming"
DONE = "[DONE]"

# Words per text frame when replaying an already materialized answer.
REPLAY_CHUNK_WORDS = 5


@dataclass(frozen=True)
class StreamEvent:
    """One downstream frame: ``metadata``, ``text``, ``error`` or ``done``."""

    kind: str
    payload: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def metadata(cls, metadata: dict[str, Any]) -> "StreamEvent":
        return cls("metadata", metadata)

    @classmethod
    def text(cls, content: str) -> "StreamEvent":
        return cls("text", {"content": content})

    @classmethod
    def error(cls, message: str = STREAM_ERROR_MESSAGE) -> "StreamEvent":
        return cls("error", {"message": message})

    @classmethod
    def done(cls) -> "StreamEvent":
        return cls("done")

    def to_sse(self) -> bytes:
        if self.kind == "done":
            return f"data: {DONE}\n\n".encode("utf-8")
        body = {"type": self.kind, **self.payload}
        return f"data: {json.dumps(body, ensure_ascii=False)}\n\n".encode("utf-8")


def has_metadata(metadata: dict[str, Any] | None) -> bool:
    """Metadata frame is only sent when at least one list is non-empty."""
    return bool(metadata) and any(bool(value) for value in metadata.values())


def _delta_content(data: str) -> str | None:
    """Content delta of one upstream ``data:`` payload; ``None`` when malformed."""
    try:
        parsed = json.loads(data)
    except json.JSONDecodeError:
        return None
    if not isinstance(parsed, dict):
        return None
    choices = parsed.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    if not isinstance(delta, dict):
        return None
    content = delta.get("content")
    return content if isinstance(content, str) and content else None


class StreamingAdapter:
    """Upstream SSE bytes in, downstream ``StreamEvent`` objects out.

    The event sequence is always: optional ``metadata``, zero or more
    ``text``, at most one ``error``, then ``done``. The upstream stream is
    closed on every exit path, including when the consumer stops early.
    """

    def __init__(self, model_timeout: float, budget: Budget):
        self.model_timeout = model_timeout
        self.budget = budget

    async def _read(self, chunks: AsyncIterator[bytes], label: str) -> bytes | None:
        self.budget.check(f"{label} read")
        try:
            return await asyncio.wait_for(chunks.__anext__(), timeout=self.model_timeout)
        except StopAsyncIteration:
            return None
        except asyncio.TimeoutError:
            raise ModelTimeoutError(label, f"{label}: no data for {self.model_timeout:g}s")

    async def events(
        self,
        stream: UpstreamStream,
        metadata: dict[str, Any] | None = None,
    ) -> AsyncIterator[StreamEvent]:
        if has_metadata(metadata):
            yield StreamEvent.metadata(metadata)

        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        buffer = ""
        chunks = stream.__aiter__()
        text_frames = 0
        dropped = 0
        try:
            upstream_done = False
            while not upstream_done:
                chunk = await self._read(chunks, stream.label)
                if chunk is None:
                    buffer += decoder.decode(b"", final=True)
                    lines, buffer = [buffer], ""
                    upstream_done = True
                else:
                    buffer += decoder.decode(chunk)
                    *lines, buffer = buffer.split("\n")

                for line in lines:
                    line = line.rstrip("\r")
                    if not line.startswith("data:"):
                        continue
                    data = line[5:].strip()
                    if data == DONE:
                        upstream_done = True
                        break
                    content = _delta_content(data)
                    if content is None:
                        dropped += 1
                        continue
                    text_frames += 1
                    yield StreamEvent.text(content)
        except BudgetExceededError as e:
            log.warning("Stream stopped by budget", label=stream.label, error=str(e))
            yield StreamEvent.error()
        except Exception as e:
            log.error("Stream read failed", label=stream.label, error_type=type(e).__name__, error=str(e))
            yield StreamEvent.error()
        finally:
            await stream.aclose()
            log.debug("Stream closed", label=stream.label, text_frames=text_frames, dropped=dropped)

        yield StreamEvent.done()

    @staticmethod
    async def replay(text: str, metadata: dict[str, Any] | None = None) -> AsyncIterator[StreamEvent]:
        """Stream a completed answer in word chunks."""
        if has_metadata(metadata):
            yield StreamEvent.metadata(metadata)

        words = text.split(" ")
        for i in range(0, len(words), REPLAY_CHUNK_WORDS):
            chunk = " ".join(words[i:i + REPLAY_CHUNK_WORDS])
            if i > 0:
                chunk = " " + chunk
            if chunk:
                yield StreamEvent.text(chunk)

        yield StreamEvent.done()
