"""HTTP surface: ``POST /chat`` and ``GET /health`` on aiohttp."""

import asyncio
import signal
import sys
import uuid
from typing import Any

from aiohttp import web

from verifolio_chat.budget import ChatLimits
from verifolio_chat.config import Config, get_config, set_config
from verifolio_chat.exceptions import (
    GENERIC_USER_MESSAGE,
    ConfirmationRequiredError,
    ForbiddenToolError,
    RequestValidationError,
    ValidationError,
    VerifolioChatError,
)
from verifolio_chat.llm import LLMProvider, create_provider
from verifolio_chat.logging import bind_request, clear_request, configure_logging, get_logger
from verifolio_chat.offline import offline_reply
from verifolio_chat.orchestrator import ChatOrchestrator, StreamingChatResponse
from verifolio_chat.permissions import PermissionGate
from verifolio_chat.prompts import PromptBuilder
from verifolio_chat.schemas import parse_chat_request
from verifolio_chat.streaming import StreamingAdapter
from verifolio_chat.tools.backend import HttpToolBackend, ToolBackend, build_registry

log = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error_body(error: VerifolioChatError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": error.user_message}
    if isinstance(error, ValidationError) and error.http_status == 400 and error.field:
        body["field"] = error.field
    return body


class WebServer:
    """Chat endpoint bound to one orchestrator.

    Without an upstream API key the server runs offline and answers every
    request from the canned replies in ``offline``.
    """

    def __init__(
        self,
        config: Config,
        orchestrator: ChatOrchestrator | None = None,
        provider: LLMProvider | None = None,
        backend: ToolBackend | None = None,
    ):
        self.config = config
        self.offline = not config.model.api_key and orchestrator is None and provider is None
        self._owned: list[Any] = []

        if orchestrator is None and not self.offline:
            if backend is None:
                backend = HttpToolBackend(config.backend.base_url, config.backend.api_key)
                self._owned.append(backend)
            if provider is None:
                provider = create_provider(config.model)
                self._owned.append(provider)
            orchestrator = ChatOrchestrator(
                provider=provider,
                registry=build_registry(backend),
                gate=PermissionGate(always_confirm=config.chat.always_confirm),
                limits=ChatLimits.from_config(config),
                prompt_builder=PromptBuilder(backend=backend, always_confirm=config.chat.always_confirm),
            )
        self.orchestrator = orchestrator

    # ── Handlers ────────────────────────────────────────────────────

    async def health(self, request: web.Request) -> web.Response:
        return web.json_response({"status": "ok", "model": self.config.model.model})

    async def chat(self, request: web.Request) -> web.StreamResponse:
        request_id = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        bind_request(request_id, user_id=request.headers.get("X-User-Id") or None)
        try:
            return await self._handle_chat(request)
        except ConfirmationRequiredError as e:
            log.info("Confirmation required", tool=e.tool_name, call_id=e.tool_call_id, mode=e.mode)
            return web.json_response(
                {
                    "mode": e.mode,
                    "tool": e.tool_name,
                    "toolCallId": e.tool_call_id,
                    "args": e.arguments,
                    "requiresConfirmation": True,
                    "message": e.user_message,
                },
                status=e.http_status,
            )
        except ForbiddenToolError as e:
            log.info("Tool forbidden", tool=e.tool_name, mode=e.mode)
            return web.json_response(
                {
                    "mode": e.mode,
                    "tool": e.tool_name,
                    "forbidden": True,
                    "message": e.user_message,
                },
                status=e.http_status,
            )
        except VerifolioChatError as e:
            log.error(
                "Chat request failed",
                status=e.http_status,
                error_type=type(e).__name__,
                error=str(e),
                partial_results=len(e.partial_results),
            )
            return web.json_response(_error_body(e), status=e.http_status)
        except Exception as e:
            log.exception("Unexpected chat failure", error=str(e))
            return web.json_response({"error": GENERIC_USER_MESSAGE}, status=500)
        finally:
            clear_request("user_id")

    async def _handle_chat(self, request: web.Request) -> web.StreamResponse:
        try:
            body = await request.json()
        except ValueError:
            raise RequestValidationError("", "body is not valid JSON")

        chat_request = parse_chat_request(body)
        user_id = request.headers.get("X-User-Id") or None

        if self.offline:
            reply = offline_reply(chat_request.message)
            log.info("Offline reply", stream=chat_request.stream)
            if chat_request.stream:
                return await self._write_sse(request, StreamingAdapter.replay(reply))
            return web.json_response({"message": reply})

        outcome = await self.orchestrator.run(chat_request, user_id)
        if isinstance(outcome, StreamingChatResponse):
            return await self._write_sse(request, outcome.events)
        return web.json_response(outcome.to_json())

    async def _write_sse(self, request: web.Request, events: Any) -> web.StreamResponse:
        """Write events as Server-Sent Events; the generator is always closed."""
        resp = web.StreamResponse(status=200, reason="OK", headers=SSE_HEADERS)
        await resp.prepare(request)
        try:
            async for event in events:
                await resp.write(event.to_sse())
        except ConnectionResetError:
            log.info("Client disconnected during stream")
            return resp
        finally:
            await events.aclose()
        await resp.write_eof()
        return resp

    # ── App ─────────────────────────────────────────────────────────

    async def close(self) -> None:
        for resource in self._owned:
            await resource.close()
        self._owned.clear()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.close()

    def create_app(self) -> web.Application:
        app = web.Application()
        app.router.add_post("/chat", self.chat)
        app.router.add_get("/health", self.health)
        app.on_cleanup.append(self._on_cleanup)
        return app


async def _run_server(config: Config) -> None:
    """Start the web server and block until SIGINT/SIGTERM."""
    server = WebServer(config)
    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _signal_handler() -> None:
        if not stop_event.is_set():
            stop_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    app = server.create_app()
    runner = web.AppRunner(app)
    await runner.setup()

    host = config.web.host
    port = config.web.port
    site = web.TCPSite(runner, host, port)
    await site.start()

    log.info("Web server started", host=host, port=port, model=config.model.model, offline=server.offline)
    print(f"\n  Verifolio Chat running at http://{host}:{port}")
    if server.offline:
        print("  No model API key configured: answering with offline replies.")
    print("  Press Ctrl+C to stop.\n")

    await stop_event.wait()

    print("\nShutting down...")
    await runner.cleanup()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass  # Signal handler handles graceful shutdown.


def main() -> None:
    """Standalone entry point for verifolio-chat-web."""
    cfg = Config.load()
    set_config(cfg)
    configure_logging()

    try:
        run_web_server(get_config())
    except Exception as e:
        print(f"Fatal error: {e}")
        sys.exit(1)
