import json

import pytest
from aiohttp.test_utils import TestClient, TestServer

from verifolio_chat.config import Config, ModelConfig
from verifolio_chat.exceptions import (
    ConfirmationRequiredError,
    ForbiddenToolError,
    ModelTimeoutError,
    NetworkError,
    UpstreamError,
)
from verifolio_chat.llm import LLMProvider, ModelReply, ToolCall
from verifolio_chat.orchestrator import ChatResponse, StreamingChatResponse
from verifolio_chat.extraction import CreatedEntity
from verifolio_chat.streaming import StreamingAdapter
from verifolio_chat.tools.backend import ToolBackend
from verifolio_chat.web_server import WebServer

UUID = "3f2b6c1e-8a4d-4f7b-9c2e-1a2b3c4d5e6f"


class StubOrchestrator:
    """Returns a canned outcome or raises a canned error."""

    def __init__(self, outcome=None, error: Exception | None = None):
        self.outcome = outcome
        self.error = error
        self.requests: list = []

    async def run(self, request, user_id=None):
        self.requests.append((request, user_id))
        if self.error is not None:
            raise self.error
        return self.outcome


class ScriptedProvider(LLMProvider):
    model = "scripted"

    def __init__(self, replies):
        self.replies = list(replies)

    async def complete(self, messages, *, tool_choice="auto", tools=None, timeout, label):
        return self.replies.pop(0)

    async def open_stream(self, messages, *, timeout, label):
        raise UpstreamError("streaming disabled", status_code=500)


class FakeBackend(ToolBackend):
    def __init__(self, results=None):
        self.results = results or {}
        self.calls: list = []

    async def invoke(self, context, user_id, tool_name, arguments):
        self.calls.append((tool_name, arguments, user_id))
        return self.results.get(tool_name, {"success": True, "message": f"{tool_name} ok"})


def _config(api_key: str = "sk-test") -> Config:
    return Config(model=ModelConfig(api_key=api_key))


def _tool_reply(call_id: str, name: str, args: dict) -> ModelReply:
    return ModelReply(content=None, tool_calls=[ToolCall(id=call_id, name=name, arguments=json.dumps(args))])


def _sse_frames(body: str) -> list[str]:
    return [frame[len("data: "):] for frame in body.split("\n\n") if frame]


@pytest.mark.asyncio
async def test_health():
    server = WebServer(_config(), orchestrator=StubOrchestrator())

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.get("/health")
        assert resp.status == 200
        assert await resp.json() == {"status": "ok", "model": "gpt-4o-mini"}


@pytest.mark.asyncio
async def test_chat_returns_message_and_metadata():
    outcome = ChatResponse(
        message="Client créé.",
        working_steps=["Créer le client"],
        entities_created=[CreatedEntity("clients", UUID, "Acme")],
    )
    orchestrator = StubOrchestrator(outcome=outcome)
    server = WebServer(_config(), orchestrator=orchestrator)

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "Crée Acme"}, headers={"X-User-Id": "u-42"})
        assert resp.status == 200
        assert await resp.json() == {
            "message": "Client créé.",
            "workingSteps": ["Créer le client"],
            "entitiesCreated": [{"type": "clients", "id": UUID, "title": "Acme"}],
        }

    request, user_id = orchestrator.requests[0]
    assert request.message == "Crée Acme"
    assert user_id == "u-42"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body, expected",
    [
        ({"history": []}, {"error": "Message requis", "field": "message"}),
        ({"message": "x", "contextId": "planet:1"}, {"error": "ContextId invalide", "field": "contextId"}),
        ({"message": "x", "mode": "turbo"}, {"error": "Requête invalide", "field": "mode"}),
    ],
)
async def test_invalid_request_is_400_with_field(body, expected):
    orchestrator = StubOrchestrator()
    server = WebServer(_config(), orchestrator=orchestrator)

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json=body)
        assert resp.status == 400
        assert await resp.json() == expected

    assert orchestrator.requests == []


@pytest.mark.asyncio
async def test_body_that_is_not_json_is_400():
    server = WebServer(_config(), orchestrator=StubOrchestrator())

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", data="not json", headers={"Content-Type": "application/json"})
        assert resp.status == 400
        assert await resp.json() == {"error": "Requête invalide"}


@pytest.mark.asyncio
async def test_confirmation_required_body():
    error = ConfirmationRequiredError("ask-first", "mark_invoice_paid", "call_pay", {"invoice_numero": "FA-001"})
    server = WebServer(_config(), orchestrator=StubOrchestrator(error=error))

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "Marque FA-001 payée", "mode": "ask-first"})
        assert resp.status == 403
        assert await resp.json() == {
            "mode": "ask-first",
            "tool": "mark_invoice_paid",
            "toolCallId": "call_pay",
            "args": {"invoice_numero": "FA-001"},
            "requiresConfirmation": True,
            "message": 'L\'action "mark_invoice_paid" nécessite une confirmation en mode ASK-FIRST.',
        }


@pytest.mark.asyncio
async def test_forbidden_tool_body():
    server = WebServer(_config(), orchestrator=StubOrchestrator(error=ForbiddenToolError("plan", "create_invoice")))

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "x", "mode": "plan"})
        assert resp.status == 403
        body = await resp.json()

    assert body["forbidden"] is True
    assert body["tool"] == "create_invoice"
    assert body["mode"] == "plan"
    assert "requiresConfirmation" not in body


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, status, message",
    [
        (UpstreamError("x", status_code=429), 429, "Trop de requêtes. Veuillez patienter quelques secondes."),
        (UpstreamError("x", status_code=401), 401, "Clé API du fournisseur invalide."),
        (UpstreamError("empty reply"), 500, "Réponse vide de l'assistant. Veuillez réessayer."),
        (ModelTimeoutError("initial"), 504, "L'assistant met trop de temps à répondre. Veuillez réessayer."),
        (NetworkError("reset"), 503, "Problème de connexion. Vérifiez votre réseau et réessayez."),
        (RuntimeError("secret internals"), 500, "Une erreur est survenue. Veuillez réessayer."),
    ],
)
async def test_errors_map_to_status_and_user_message(error, status, message):
    server = WebServer(_config(), orchestrator=StubOrchestrator(error=error))

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "x"})
        assert resp.status == status
        assert await resp.json() == {"error": message}


@pytest.mark.asyncio
async def test_streaming_response_is_sse():
    events = StreamingAdapter.replay("Bonjour", {"workingSteps": ["Charger les clients"]})
    server = WebServer(_config(), orchestrator=StubOrchestrator(outcome=StreamingChatResponse(events)))

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "x", "stream": True})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("text/event-stream")
        body = await resp.text()

    frames = _sse_frames(body)
    assert json.loads(frames[0]) == {"type": "metadata", "workingSteps": ["Charger les clients"]}
    assert json.loads(frames[1]) == {"type": "text", "content": "Bonjour"}
    assert frames[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_offline_mode_answers_without_a_model():
    server = WebServer(_config(api_key=""))

    assert server.offline
    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "Je veux créer un devis"})
        assert resp.status == 200
        body = await resp.json()

    assert body["message"].startswith("Pour créer un devis")


@pytest.mark.asyncio
async def test_offline_mode_streams_when_asked():
    server = WebServer(_config(api_key=""))

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "bonjour", "stream": True})
        body = await resp.text()

    frames = _sse_frames(body)
    text = "".join(json.loads(f)["content"] for f in frames[:-1])
    assert text.startswith("Je suis Verifolio")
    assert frames[-1] == "[DONE]"


@pytest.mark.asyncio
async def test_create_client_through_the_full_stack():
    provider = ScriptedProvider(
        [
            _tool_reply("call_1", "create_client", {"type": "entreprise", "nom": "Acme"}),
            ModelReply(content="C'est fait, Acme est créé."),
        ]
    )
    backend = FakeBackend(
        {"create_client": {"success": True, "message": f'Client "Acme" créé avec succès (entreprise).\n(ID: {UUID})'}}
    )
    server = WebServer(_config(), provider=provider, backend=backend)

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "Crée le client Acme"}, headers={"X-User-Id": "u-1"})
        assert resp.status == 200
        body = await resp.json()

    assert body["entitiesCreated"] == [{"type": "clients", "id": UUID, "title": "Acme"}]
    assert body["workingSteps"] == ["Créer le client"]
    assert backend.calls == [("create_client", {"type": "entreprise", "nom": "Acme"}, "u-1")]


@pytest.mark.asyncio
async def test_ask_first_confirmation_through_the_full_stack():
    provider = ScriptedProvider([_tool_reply("call_pay", "mark_invoice_paid", {"invoice_numero": "FA-001"})])
    backend = FakeBackend()
    server = WebServer(_config(), provider=provider, backend=backend)

    async with TestClient(TestServer(server.create_app())) as client:
        resp = await client.post("/chat", json={"message": "FA-001 est payée", "mode": "ask-first"})
        assert resp.status == 403
        body = await resp.json()

    assert body["toolCallId"] == "call_pay"
    assert body["requiresConfirmation"] is True
    assert backend.calls == []
