"""Tests for cogsworth.session: frame dispatch, turn lifecycle, teardown."""

import asyncio
import json
from unittest.mock import patch

import httpx
import pytest

from cogsworth.llm import HttpStreamingLLM, StreamError, UpstreamHTTPError, event_stream
from cogsworth.models import ChatPayload, GenerationRequest, ServerMessage, ServerPayload, Turn
from cogsworth.prompts import PromptError
from cogsworth.session import (
    BUSY_MESSAGE,
    INVALID_FRAME_MESSAGE,
    ChatSession,
    SessionBusyError,
    SessionOrchestrator,
)


class ScriptedLLM:
    """Streams a fixed token list, optionally held open until released."""

    def __init__(self, tokens=("Hello", " there", "[emotion:happy]"), error=None, hold=False):
        self.tokens = list(tokens)
        self.error = error
        self.requests: list[GenerationRequest] = []
        self.release = asyncio.Event()
        if not hold:
            self.release.set()
        self.started = asyncio.Event()
        self.closed = False

    def stream(self, request: GenerationRequest):
        self.requests.append(request)
        return event_stream(self._tokens())

    async def _tokens(self):
        self.started.set()
        try:
            await self.release.wait()
            for token in self.tokens:
                yield token
            if self.error is not None:
                raise self.error
        finally:
            self.closed = True


class Outbox:
    def __init__(self) -> None:
        self.messages: list[ServerMessage] = []

    async def __call__(self, message: ServerMessage) -> None:
        self.messages.append(message)

    @property
    def types(self) -> list[str]:
        return [m.type for m in self.messages]


def _frame(user_input: str = "Hi robot", **payload) -> str:
    return json.dumps({"type": "chat", "payload": {"userInput": user_input, **payload}})


@pytest.fixture
def outbox() -> Outbox:
    return Outbox()


def _orchestrator(llm, outbox, **kwargs) -> SessionOrchestrator:
    return SessionOrchestrator(ChatSession(history_limit=kwargs.pop("history_limit", 10)),
                               llm, outbox, **kwargs)


async def _run_turn(orch: SessionOrchestrator, frame: str) -> None:
    await orch.handle_frame(frame)
    if orch.task is not None:
        await orch.task


# ---------------------------------------------------------------------------
# Turn lifecycle
# ---------------------------------------------------------------------------

class TestTurnLifecycle:
    async def test_success_sequence(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(), outbox)
        await _run_turn(orch, _frame())

        assert outbox.types == ["processing", "fullResponse", "idle"]
        payload = outbox.messages[1].payload
        assert isinstance(payload, ServerPayload)
        assert (payload.text, payload.emotion) == ("Hello there", "happy")
        assert orch.session.is_generating is False

    async def test_upstream_error_sequence(self, outbox: Outbox) -> None:
        llm = ScriptedLLM(tokens=[], error=UpstreamHTTPError(503, "down"))
        orch = _orchestrator(llm, outbox)
        await _run_turn(orch, _frame())

        assert outbox.types == ["processing", "error", "idle"]
        assert outbox.messages[1].payload == "AI Error: AI Service Error (503): down"

    async def test_error_after_tokens_sends_no_response(self, outbox: Outbox) -> None:
        llm = ScriptedLLM(tokens=["partial"], error=StreamError("cut"))
        orch = _orchestrator(llm, outbox)
        await _run_turn(orch, _frame())

        assert outbox.types == ["processing", "error", "idle"]
        assert list(orch.session.history) == []

    async def test_untagged_reply_defaults_to_neutral(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(tokens=["plain reply"]), outbox)
        await _run_turn(orch, _frame())
        payload = outbox.messages[1].payload
        assert (payload.text, payload.emotion) == ("plain reply", "neutral")

    async def test_request_carries_directive_and_input(self, outbox: Outbox) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox)
        await _run_turn(orch, _frame("What time is it?", personalityDirectiveInputs="pirate",
                                     userName="Ada"))

        request = llm.requests[0]
        assert "**pirate**" in request.system_directive
        assert "Ada" in request.system_directive
        assert request.turns == (Turn(role="user", content="What time is it?"),)
        assert request.messages()[0]["role"] == "system"

    async def test_prompt_error_reported_without_upstream_call(self, outbox: Outbox) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox)
        with patch("cogsworth.session.build_system_directive", side_effect=PromptError("bad")):
            await _run_turn(orch, _frame())

        assert outbox.types == ["processing", "error", "idle"]
        assert llm.requests == []
        assert orch.session.is_generating is False

    async def test_ready_for_next_turn(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(), outbox)
        await _run_turn(orch, _frame("one"))
        await _run_turn(orch, _frame("two"))
        assert outbox.types == ["processing", "fullResponse", "idle"] * 2


# ---------------------------------------------------------------------------
# Busy rejection
# ---------------------------------------------------------------------------

class TestBusy:
    async def test_second_request_rejected_while_generating(self, outbox: Outbox) -> None:
        llm = ScriptedLLM(hold=True)
        orch = _orchestrator(llm, outbox)

        await orch.handle_frame(_frame("first"))
        await llm.started.wait()
        await orch.handle_frame(_frame("second"))

        assert outbox.types == ["processing", "error"]
        assert outbox.messages[1].payload == BUSY_MESSAGE
        assert len(llm.requests) == 1

        llm.release.set()
        await orch.task
        assert outbox.types == ["processing", "error", "fullResponse", "idle"]

    async def test_busy_flag_set_before_any_await(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(hold=True), outbox)
        first = asyncio.create_task(orch.handle_chat(ChatPayload(user_input="a")))
        await asyncio.sleep(0)
        with pytest.raises(SessionBusyError):
            await orch.handle_chat(ChatPayload(user_input="b"))
        await first
        await orch.close()


# ---------------------------------------------------------------------------
# Inbound validation
# ---------------------------------------------------------------------------

class TestInvalidFrames:
    async def test_not_json(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(), outbox)
        await orch.handle_frame("{{nope")
        assert outbox.types == ["error"]
        assert outbox.messages[0].payload == INVALID_FRAME_MESSAGE

    async def test_unknown_type(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(), outbox)
        await orch.handle_frame(json.dumps({"type": "ping"}))
        assert outbox.messages[0].payload == "Unknown message type: ping"

    @pytest.mark.parametrize("payload", [{}, {"userInput": ""}, {"userInput": 5}])
    async def test_bad_chat_payload(self, outbox: Outbox, payload: dict) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox)
        await orch.handle_frame(json.dumps({"type": "chat", "payload": payload}))
        assert outbox.types == ["error"]
        assert outbox.messages[0].payload == INVALID_FRAME_MESSAGE
        assert llm.requests == []
        assert orch.session.is_generating is False


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------

class TestHistory:
    async def test_session_remembers_turns(self, outbox: Outbox) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox)
        await _run_turn(orch, _frame("first"))
        await _run_turn(orch, _frame("second"))

        assert llm.requests[1].turns == (
            Turn(role="user", content="first"),
            Turn(role="assistant", content="Hello there"),
            Turn(role="user", content="second"),
        )

    async def test_client_history_replaces_session_history(self, outbox: Outbox) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox)
        await _run_turn(orch, _frame("first"))
        history = [{"role": "user", "content": "earlier"}, {"role": "assistant", "content": "ok"}]
        await _run_turn(orch, _frame("second", history=history))

        assert [t.content for t in llm.requests[1].turns] == ["earlier", "ok", "second"]

    async def test_empty_history_list_clears(self, outbox: Outbox) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox)
        await _run_turn(orch, _frame("first"))
        await _run_turn(orch, _frame("second", history=[]))
        assert llm.requests[1].turns == (Turn(role="user", content="second"),)

    async def test_history_bounded(self, outbox: Outbox) -> None:
        llm = ScriptedLLM()
        orch = _orchestrator(llm, outbox, history_limit=4)
        for i in range(4):
            await _run_turn(orch, _frame(f"turn {i}"))
        assert len(orch.session.history) == 4
        assert orch.session.history[0].content == "turn 2"


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

class TestClose:
    async def test_close_cancels_generation_and_drops_sends(self, outbox: Outbox) -> None:
        llm = ScriptedLLM(hold=True)
        orch = _orchestrator(llm, outbox)
        await orch.handle_frame(_frame())
        await llm.started.wait()

        await orch.close()

        assert outbox.types == ["processing"]
        assert llm.closed is True
        assert orch.session.is_closed is True
        assert orch.task is None

    async def test_emit_after_close_is_noop(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(), outbox)
        await orch.close()
        await orch.emit("idle")
        assert outbox.messages == []

    async def test_send_failure_marks_session_closed(self) -> None:
        async def broken_send(message: ServerMessage) -> None:
            raise RuntimeError("socket gone")

        orch = SessionOrchestrator(ChatSession(), ScriptedLLM(), broken_send)
        await orch.emit("processing")
        assert orch.session.is_closed is True

    async def test_close_without_task(self, outbox: Outbox) -> None:
        orch = _orchestrator(ScriptedLLM(), outbox)
        await orch.close()
        assert orch.session.is_closed is True


# ---------------------------------------------------------------------------
# Over the HTTP client
# ---------------------------------------------------------------------------

def _http_llm(statuses: list[int], calls: list) -> HttpStreamingLLM:
    replies = iter(statuses)

    def handler(req: httpx.Request) -> httpx.Response:
        status = next(replies)
        calls.append(status)
        if status != 200:
            return httpx.Response(status, json={"error": {"message": "upstream said no"}})
        body = (
            'data: {"choices": [{"delta": {"content": "Tick tock"}}]}\n\n'
            'data: {"choices": [{"delta": {"content": "[emotion:happy]"}}]}\n\n'
            "data: [DONE]\n\n"
        )
        return httpx.Response(200, content=body.encode())

    return HttpStreamingLLM(
        api_url="http://llm.test/v1",
        api_key="secret",
        retry_delay=0.0,
        transport=httpx.MockTransport(handler),
    )


class TestOverHttpClient:
    async def test_server_errors_retried_then_one_response(self, outbox: Outbox) -> None:
        calls: list[int] = []
        orch = _orchestrator(_http_llm([503, 503, 200], calls), outbox)
        await _run_turn(orch, _frame())

        assert calls == [503, 503, 200]
        assert outbox.types == ["processing", "fullResponse", "idle"]
        payload = outbox.messages[1].payload
        assert (payload.text, payload.emotion) == ("Tick tock", "happy")

    async def test_client_error_single_attempt(self, outbox: Outbox) -> None:
        calls: list[int] = []
        orch = _orchestrator(_http_llm([400], calls), outbox)
        await _run_turn(orch, _frame())

        assert calls == [400]
        assert outbox.types == ["processing", "error", "idle"]
        assert outbox.messages[1].payload == "AI Error: AI Service Error (400): upstream said no"

    async def test_retries_exhausted_single_error(self, outbox: Outbox) -> None:
        calls: list[int] = []
        orch = _orchestrator(_http_llm([500, 502, 503], calls), outbox)
        await _run_turn(orch, _frame())

        assert len(calls) == 3
        assert outbox.types == ["processing", "error", "idle"]
