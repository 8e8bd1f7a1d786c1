import json

import pytest

import verifolio_chat.orchestrator as orchestrator_module

from verifolio_chat.budget import ChatLimits
from verifolio_chat.exceptions import (
    BudgetExceededError,
    ConfirmationRequiredError,
    ForbiddenToolError,
    ModelTimeoutError,
    NetworkError,
    ToolExecutionError,
    UpstreamError,
)
from verifolio_chat.llm import LLMProvider, ModelReply, ToolCall, UpstreamStream
from verifolio_chat.orchestrator import DEFAULT_REPLY, ChatOrchestrator, ChatResponse, StreamingChatResponse
from verifolio_chat.prompts import PromptBuilder
from verifolio_chat.schemas import parse_chat_request
from verifolio_chat.tools.backend import ToolBackend, build_registry
from verifolio_chat.tools.catalog import READ_ONLY_TOOLS

UUID = "3f2b6c1e-8a4d-4f7b-9c2e-1a2b3c4d5e6f"


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class ScriptedProvider(LLMProvider):
    """Replays canned replies in order; exceptions in the script are raised."""

    model = "scripted"

    def __init__(self, replies, stream=None):
        self.replies = list(replies)
        self.stream = stream
        self.calls: list[dict] = []

    async def complete(self, messages, *, tool_choice="auto", tools=None, timeout, label):
        self.calls.append({"label": label, "tool_choice": tool_choice, "tools": tools, "messages": list(messages)})
        if not self.replies:
            raise AssertionError(f"unexpected model call: {label}")
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def open_stream(self, messages, *, timeout, label):
        self.calls.append({"label": label, "tool_choice": "stream", "tools": None, "messages": list(messages)})
        if self.stream is None:
            raise UpstreamError("streaming disabled", status_code=500)
        if isinstance(self.stream, Exception):
            raise self.stream
        return self.stream


class FakeBackend(ToolBackend):
    def __init__(self, results=None, on_invoke=None):
        self.results = results or {}
        self.on_invoke = on_invoke
        self.calls: list = []

    async def invoke(self, context, user_id, tool_name, arguments):
        self.calls.append((tool_name, arguments, user_id))
        if self.on_invoke is not None:
            self.on_invoke(tool_name)
        result = self.results.get(tool_name, {"success": True, "message": f"{tool_name} ok"})
        if isinstance(result, Exception):
            raise result
        return result


class StaticPrompts(PromptBuilder):
    async def build_system_prompt(self, mode, context_id, budget):
        return f"system:{mode.value}"


def tool_reply(*calls) -> ModelReply:
    return ModelReply(
        content=None,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=json.dumps(args)) for call_id, name, args in calls],
        finish_reason="tool_calls",
    )


def text_reply(text: str | None) -> ModelReply:
    return ModelReply(content=text, finish_reason="stop")


def request(**body):
    body.setdefault("message", "Bonjour")
    return parse_chat_request(body)


def make_orchestrator(provider, backend, **kwargs) -> ChatOrchestrator:
    return ChatOrchestrator(
        provider=provider,
        registry=build_registry(backend),
        prompt_builder=StaticPrompts(),
        **kwargs,
    )


class RecordingLog:
    def __init__(self):
        self.events: list[tuple[str, str, dict]] = []

    def __getattr__(self, level):
        return lambda event, **fields: self.events.append((level, event, fields))

    def warnings(self) -> dict[str, dict]:
        return {event: fields for level, event, fields in self.events if level == "warning"}


def tool_choices(provider: ScriptedProvider) -> list[str]:
    return [call["tool_choice"] for call in provider.calls]


async def collect(outcome: StreamingChatResponse):
    return [event async for event in outcome.events]


@pytest.mark.asyncio
async def test_direct_answer_without_tools():
    provider = ScriptedProvider([text_reply("Bonjour ! Que puis-je faire ?")])
    backend = FakeBackend()

    outcome = await make_orchestrator(provider, backend).run(request(message="Salut"))

    assert isinstance(outcome, ChatResponse)
    assert outcome.to_json() == {"message": "Bonjour ! Que puis-je faire ?"}
    assert tool_choices(provider) == ["auto"]
    assert backend.calls == []


@pytest.mark.asyncio
async def test_messages_start_with_system_history_then_user():
    provider = ScriptedProvider([text_reply("ok")])

    await make_orchestrator(provider, FakeBackend()).run(
        request(
            message="Et maintenant ?",
            history=[{"role": "user", "content": "Salut"}, {"role": "assistant", "content": "Bonjour"}],
        )
    )

    messages = provider.calls[0]["messages"]
    assert [(m.role, m.content) for m in messages] == [
        ("system", "system:auto"),
        ("user", "Salut"),
        ("assistant", "Bonjour"),
        ("user", "Et maintenant ?"),
    ]


@pytest.mark.asyncio
async def test_empty_direct_answer_gets_default_reply():
    provider = ScriptedProvider([text_reply(None)])

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert outcome.message == DEFAULT_REPLY


@pytest.mark.asyncio
async def test_create_client_end_to_end():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "create_client", {"type": "entreprise", "nom": "Acme"})),
            text_reply("Le client Acme est créé."),
        ]
    )
    backend = FakeBackend(
        {"create_client": {"success": True, "message": f'Client "Acme" créé avec succès (entreprise).\n(ID: {UUID})'}}
    )

    outcome = await make_orchestrator(provider, backend).run(request(message="Crée le client Acme"), "user-1")

    assert outcome.to_json() == {
        "message": "Le client Acme est créé.",
        "workingSteps": ["Créer le client"],
        "entitiesCreated": [{"type": "clients", "id": UUID, "title": "Acme"}],
    }
    assert backend.calls == [("create_client", {"type": "entreprise", "nom": "Acme"}, "user-1")]
    assert tool_choices(provider) == ["auto", "auto"]

    follow_up = provider.calls[1]["messages"]
    assert follow_up[-2].role == "assistant"
    assert follow_up[-2].tool_calls[0].id == "call_1"
    assert follow_up[-1].role == "tool"
    assert follow_up[-1].tool_call_id == "call_1"


@pytest.mark.asyncio
async def test_same_entity_is_reported_once():
    message = f'Client "Acme" créé avec succès (entreprise).\n(ID: {UUID})'
    provider = ScriptedProvider(
        [
            tool_reply(
                ("call_1", "create_client", {"type": "entreprise", "nom": "Acme"}),
                ("call_2", "create_client", {"type": "entreprise", "nom": "Acme"}),
            ),
            text_reply("Fait."),
        ]
    )
    backend = FakeBackend({"create_client": {"success": True, "message": message}})

    outcome = await make_orchestrator(provider, backend).run(request())

    assert outcome.working_steps == ["Créer le client", "Créer le client"]
    assert len(outcome.entities_created) == 1


@pytest.mark.asyncio
async def test_plan_mode_offers_read_only_tools_and_forbids_writes():
    provider = ScriptedProvider([tool_reply(("call_1", "create_client", {"type": "entreprise", "nom": "Acme"}))])
    backend = FakeBackend()

    with pytest.raises(ForbiddenToolError) as exc_info:
        await make_orchestrator(provider, backend).run(request(mode="plan"))

    offered = {tool["function"]["name"] for tool in provider.calls[0]["tools"]}
    assert offered == READ_ONLY_TOOLS
    assert exc_info.value.tool_name == "create_client"
    assert backend.calls == []


@pytest.mark.asyncio
async def test_ask_first_requires_confirmation_for_writes():
    provider = ScriptedProvider([tool_reply(("call_pay", "mark_invoice_paid", {"invoice_numero": "FA-001"}))])
    backend = FakeBackend()

    with pytest.raises(ConfirmationRequiredError) as exc_info:
        await make_orchestrator(provider, backend).run(request(mode="ask-first"))

    assert exc_info.value.tool_call_id == "call_pay"
    assert exc_info.value.tool_name == "mark_invoice_paid"
    assert exc_info.value.arguments == {"invoice_numero": "FA-001"}
    assert backend.calls == []


@pytest.mark.asyncio
async def test_ask_first_runs_the_confirmed_call():
    provider = ScriptedProvider(
        [
            tool_reply(("call_pay", "mark_invoice_paid", {"invoice_numero": "FA-001"})),
            text_reply("Facture FA-001 marquée comme payée."),
        ]
    )
    backend = FakeBackend()

    outcome = await make_orchestrator(provider, backend).run(
        request(mode="ask-first", confirmedAction=True, confirmedToolCallId="call_pay")
    )

    assert outcome.message == "Facture FA-001 marquée comme payée."
    assert backend.calls == [("mark_invoice_paid", {"invoice_numero": "FA-001"}, None)]


@pytest.mark.asyncio
async def test_second_round_calls_are_gated_too():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_invoices", {"numero": "FA-001"})),
            tool_reply(("call_2", "mark_invoice_paid", {"invoice_numero": "FA-001"})),
        ]
    )
    backend = FakeBackend()

    with pytest.raises(ConfirmationRequiredError) as exc_info:
        await make_orchestrator(provider, backend).run(request(mode="ask-first"))

    assert exc_info.value.tool_call_id == "call_2"
    assert [c[0] for c in backend.calls] == ["list_invoices"]


@pytest.mark.asyncio
async def test_two_tool_rounds_then_final_answer():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {})),
            tool_reply(("call_2", "list_invoices", {"status": "envoyee"})),
            text_reply("Deux factures en attente."),
        ]
    )
    backend = FakeBackend()

    outcome = await make_orchestrator(provider, backend).run(request())

    assert outcome.message == "Deux factures en attente."
    assert outcome.working_steps == ["Charger les clients", "Charger les factures"]
    assert tool_choices(provider) == ["auto", "auto", "none"]


@pytest.mark.asyncio
async def test_follow_up_failure_degrades_to_raw_results():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {}), ("call_2", "list_invoices", {})),
            UpstreamError("boom", status_code=500),
        ]
    )
    backend = FakeBackend(
        {
            "list_clients": {"success": True, "message": "3 clients"},
            "list_invoices": {"success": True, "message": "2 factures"},
        }
    )

    outcome = await make_orchestrator(provider, backend).run(request())

    assert outcome.message == "3 clients\n\n2 factures"
    assert outcome.degraded is True
    assert outcome.working_steps == ["Charger les clients", "Charger les factures"]


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ModelTimeoutError("follow-up"), NetworkError("reset")])
async def test_follow_up_timeout_or_network_failure_degrades(error):
    provider = ScriptedProvider([tool_reply(("call_1", "list_clients", {})), error])

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert outcome.message == "list_clients ok"
    assert outcome.degraded is True


@pytest.mark.asyncio
async def test_final_answer_failure_uses_last_round_results():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {})),
            tool_reply(("call_2", "list_invoices", {})),
            UpstreamError("boom", status_code=502),
        ]
    )

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert outcome.message == "list_invoices ok"
    assert outcome.degraded is True


@pytest.mark.asyncio
async def test_initial_call_failure_is_not_absorbed():
    provider = ScriptedProvider([UpstreamError("rate limited", status_code=429)])

    with pytest.raises(UpstreamError) as exc_info:
        await make_orchestrator(provider, FakeBackend()).run(request())

    assert exc_info.value.http_status == 429


@pytest.mark.asyncio
async def test_exhausted_budget_is_never_degraded():
    clock = FakeClock()
    backend = FakeBackend(on_invoke=lambda name: setattr(clock, "now", clock.now + 120.0))
    provider = ScriptedProvider([tool_reply(("call_1", "list_clients", {}))])
    orchestrator = make_orchestrator(provider, backend, limits=ChatLimits(total_timeout=90.0), clock=clock)

    with pytest.raises(BudgetExceededError):
        await orchestrator.run(request())

    assert tool_choices(provider) == ["auto"]


@pytest.mark.asyncio
async def test_round_cap_stops_after_configured_rounds():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {})),
            text_reply("Un seul tour."),
        ]
    )
    orchestrator = make_orchestrator(provider, FakeBackend(), limits=ChatLimits(max_tool_rounds=1))

    outcome = await orchestrator.run(request())

    assert outcome.message == "Un seul tour."
    assert tool_choices(provider) == ["auto", "none"]


@pytest.mark.asyncio
async def test_tool_failure_propagates_with_partial_results():
    provider = ScriptedProvider(
        [
            tool_reply(
                ("call_1", "list_clients", {}),
                ("call_2", "create_client", {"type": "entreprise", "nom": "Acme"}),
                ("call_3", "list_invoices", {}),
            )
        ]
    )
    backend = FakeBackend({"create_client": RuntimeError("db down")})

    with pytest.raises(ToolExecutionError) as exc_info:
        await make_orchestrator(provider, backend).run(request())

    assert [r.call_id for r in exc_info.value.partial_results] == ["call_1"]
    assert [c[0] for c in backend.calls] == ["list_clients", "create_client"]


@pytest.mark.asyncio
async def test_refusal_triggers_one_forced_tool_retry():
    provider = ScriptedProvider(
        [
            text_reply("Je n'ai pas accès à vos factures."),
            tool_reply(("call_r", "list_invoices", {})),
            text_reply("Vous avez 2 factures."),
        ]
    )
    backend = FakeBackend()

    outcome = await make_orchestrator(provider, backend).run(request(message="Mes factures ?"))

    assert outcome.message == "Vous avez 2 factures."
    assert tool_choices(provider) == ["auto", "required", "none"]
    assert [c[0] for c in backend.calls] == ["list_invoices"]
    retry_messages = provider.calls[1]["messages"]
    assert retry_messages[-1].content == "Mes factures ?"


@pytest.mark.asyncio
async def test_retry_without_tool_calls_keeps_the_first_answer():
    provider = ScriptedProvider(
        [
            text_reply("Je ne peux pas répondre à ça."),
            text_reply("Je ne peux toujours pas."),
        ]
    )

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert outcome.message == "Je ne peux pas répondre à ça."
    assert tool_choices(provider) == ["auto", "required"]


@pytest.mark.asyncio
async def test_retry_failure_keeps_the_first_answer():
    provider = ScriptedProvider([text_reply("Je ne peux pas répondre à ça."), NetworkError("reset")])

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert outcome.message == "Je ne peux pas répondre à ça."


@pytest.mark.asyncio
async def test_at_most_one_required_call_per_request():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {})),
            text_reply("Je n'ai pas d'information sur ses factures."),
            tool_reply(("call_r", "list_invoices", {})),
            text_reply("Je ne peux pas en dire plus."),
        ]
    )

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert tool_choices(provider) == ["auto", "auto", "required", "none"]
    assert tool_choices(provider).count("required") == 1
    assert outcome.message == "Je ne peux pas en dire plus."
    assert outcome.working_steps == ["Charger les clients", "Charger les factures"]


@pytest.mark.asyncio
async def test_non_refusal_text_is_not_retried():
    provider = ScriptedProvider([text_reply("Voulez-vous que je crée la facture ?")])

    outcome = await make_orchestrator(provider, FakeBackend()).run(request())

    assert outcome.message == "Voulez-vous que je crée la facture ?"
    assert tool_choices(provider) == ["auto"]


@pytest.mark.asyncio
async def test_final_answer_streams_after_tool_rounds():
    closed: list[bool] = []

    async def chunks():
        yield b'data: {"choices":[{"delta":{"content":"Voici "}}]}\n\n'
        yield b'data: {"choices":[{"delta":{"content":"le total."}}]}\n\n'
        yield b"data: [DONE]\n\n"

    async def close():
        closed.append(True)

    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {})),
            tool_reply(("call_2", "get_financial_summary", {"query_type": "all"})),
        ],
        stream=UpstreamStream(chunks(), close, label="final stream"),
    )

    outcome = await make_orchestrator(provider, FakeBackend()).run(request(stream=True))

    assert isinstance(outcome, StreamingChatResponse)
    events = await collect(outcome)
    assert [e.kind for e in events] == ["metadata", "text", "text", "done"]
    assert events[0].payload["workingSteps"] == ["Charger les clients", "Charger le résumé financier"]
    assert closed == [True]
    assert tool_choices(provider) == ["auto", "auto", "stream"]


@pytest.mark.asyncio
async def test_stream_open_failure_falls_back_to_single_reply():
    provider = ScriptedProvider(
        [
            tool_reply(("call_1", "list_clients", {})),
            tool_reply(("call_2", "list_invoices", {})),
            text_reply("Réponse complète."),
        ],
        stream=NetworkError("refused"),
    )

    outcome = await make_orchestrator(provider, FakeBackend()).run(request(stream=True))

    events = await collect(outcome)
    assert [e.kind for e in events] == ["metadata", "text", "done"]
    assert events[1].payload == {"content": "Réponse complète."}
    assert tool_choices(provider) == ["auto", "auto", "stream", "none"]


@pytest.mark.asyncio
async def test_direct_answer_is_replayed_when_streaming():
    provider = ScriptedProvider([text_reply("Bonjour, comment puis-je vous aider aujourd'hui ?")])

    outcome = await make_orchestrator(provider, FakeBackend()).run(request(stream=True))

    events = await collect(outcome)
    assert events[0].kind == "text"
    assert events[-1].kind == "done"
    assert "".join(e.payload["content"] for e in events if e.kind == "text") == (
        "Bonjour, comment puis-je vous aider aujourd'hui ?"
    )


@pytest.mark.asyncio
async def test_degraded_call_logs_the_phase_it_failed_in(monkeypatch):
    recorder = RecordingLog()
    monkeypatch.setattr(orchestrator_module, "log", recorder)
    provider = ScriptedProvider([tool_reply(("call_1", "list_clients", {})), NetworkError("reset")])

    await make_orchestrator(provider, FakeBackend()).run(request())

    degraded = recorder.warnings()["Model call failed, degrading"]
    assert degraded["phase"] == "follow_up"
    assert degraded["label"] == "follow-up"


@pytest.mark.asyncio
async def test_stopped_request_logs_the_phase_it_stopped_in(monkeypatch):
    recorder = RecordingLog()
    monkeypatch.setattr(orchestrator_module, "log", recorder)
    provider = ScriptedProvider([tool_reply(("call_1", "create_client", {"type": "entreprise", "nom": "Acme"}))])

    with pytest.raises(ForbiddenToolError):
        await make_orchestrator(provider, FakeBackend()).run(request(mode="plan"))

    stopped = recorder.warnings()["Chat request stopped"]
    assert stopped == {"phase": "permission", "error_type": "ForbiddenToolError"}
