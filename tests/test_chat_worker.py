import pytest
import requests

from chat_worker import (
    NO_RESPONSE,
    ChatEvent,
    ChatMessage,
    ChatWorker,
    metrics_from_done,
    outgoing_messages,
)
from conftest import FakeResponse
from network_client import CHAT_TIMEOUT
from ollama_client import OllamaClient

DONE_LINE = {
    "done": True,
    "eval_count": 50,
    "eval_duration": 2_000_000_000,
    "prompt_eval_count": 12,
    "total_duration": 3_500_000_000,
    "load_duration": 250_000_000,
}


def delta(text):
    return {"message": {"role": "assistant", "content": text}, "done": False}


def run_chat(messages=None):
    messages = messages or [ChatMessage("user", "hi"), ChatMessage("assistant", "")]
    worker = ChatWorker(OllamaClient(), "llama3", messages)
    worker.execute()
    return worker.poll()


def test_tokens_per_sec():
    m = metrics_from_done(DONE_LINE)
    assert m.tokens_per_sec == pytest.approx(25.0)
    assert m.gen_tokens == 50
    assert m.prompt_tokens == 12
    assert m.total_duration_ms == pytest.approx(3500.0)
    assert m.load_duration_ms == pytest.approx(250.0)
    assert m.ttft_ms == 0.0


def test_zero_duration_does_not_divide_by_zero():
    m = metrics_from_done({"done": True, "eval_count": 3, "eval_duration": 0})
    assert m.tokens_per_sec == pytest.approx(3e9)


def test_placeholder_not_sent():
    msgs = [ChatMessage("user", "hello"), ChatMessage("assistant", "")]
    assert outgoing_messages(msgs) == [{"role": "user", "content": "hello"}]
    full = [ChatMessage("user", "a"), ChatMessage("assistant", "b")]
    assert len(outgoing_messages(full)) == 2


def test_stream_first_token_then_tokens_then_done(fake_http):
    rec = fake_http("post", {"/api/chat": FakeResponse(lines=[
        delta(""),
        delta("Hel"),
        "{broken",
        delta("lo"),
        DONE_LINE,
        delta("ignored"),
    ])})
    events = run_chat()
    kinds = [e.kind for e in events]
    assert kinds == [ChatEvent.FIRST_TOKEN, ChatEvent.TOKEN, ChatEvent.DONE]
    assert events[0].text == "Hel"
    assert events[0].ttft_ms >= 0.0
    assert events[1].text == "lo"
    assert events[2].metrics.tokens_per_sec == pytest.approx(25.0)

    url, kwargs = rec.calls[0]
    assert url.endswith("/api/chat")
    assert kwargs["json"]["stream"] is True
    assert kwargs["json"]["messages"] == [{"role": "user", "content": "hi"}]
    assert kwargs["timeout"] == CHAT_TIMEOUT


def test_closed_without_anything_is_error(fake_http):
    fake_http("post", {"/api/chat": FakeResponse(lines=[])})
    events = run_chat()
    assert [(e.kind, e.message) for e in events] == [(ChatEvent.ERROR, NO_RESPONSE)]


def test_closed_after_deltas_keeps_text(fake_http):
    fake_http("post", {"/api/chat": FakeResponse(lines=[delta("partial")])})
    events = run_chat()
    assert events[-1].kind == ChatEvent.DONE
    assert events[-1].metrics.gen_tokens == 0


def test_structured_error_line(fake_http):
    fake_http("post", {"/api/chat": FakeResponse(lines=[{"error": "model requires more system memory"}])})
    events = run_chat()
    assert events[-1].kind == ChatEvent.ERROR
    assert events[-1].message == "model requires more system memory"


def test_http_error(fake_http):
    fake_http("post", {"/api/chat": FakeResponse(status_code=404, body={"error": "model \"nope\" not found"})})
    events = run_chat()
    assert events[0].message == 'model "nope" not found'


def test_read_error_is_terminal(fake_http):
    fake_http("post", {"/api/chat": FakeResponse(lines=[delta("a"), requests.exceptions.ChunkedEncodingError("eof")])})
    events = run_chat()
    assert events[0].kind == ChatEvent.FIRST_TOKEN
    assert events[-1].kind == ChatEvent.ERROR


def test_misshapen_message_lines_are_skipped(fake_http):
    fake_http("post", {"/api/chat": FakeResponse(lines=[
        {"message": "not a dict", "done": False},
        {"message": {"role": "assistant", "content": 5}, "done": False},
        {"message": None, "done": False},
        delta("Hi"),
        DONE_LINE,
    ])})
    events = run_chat()
    assert [e.kind for e in events] == [ChatEvent.FIRST_TOKEN, ChatEvent.DONE]
    assert events[0].text == "Hi"


def test_unexpected_crash_becomes_error_event(monkeypatch):
    def boom(*args, **kwargs):
        raise RuntimeError("boom")

    monkeypatch.setattr(OllamaClient, "chat_stream", boom)
    events = run_chat()
    assert [(e.kind, e.message) for e in events] == [(ChatEvent.ERROR, "boom")]
