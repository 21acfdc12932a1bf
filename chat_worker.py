import logging
import time
from typing import List, Optional, Sequence

import requests

from network_client import decode_line, error_message
from ollama_client import OllamaClient
from workers import StreamWorker

log = logging.getLogger(__name__)

NO_RESPONSE = "no response received"

NS_PER_MS = 1_000_000


class ChatMessage:
    USER = "user"
    ASSISTANT = "assistant"

    def __init__(self, role: str, content: str = ""):
        self.role = role
        self.content = content

    def to_json(self) -> dict:
        return {"role": self.role, "content": self.content}

    def __eq__(self, other):
        if not isinstance(other, ChatMessage):
            return NotImplemented
        return self.role == other.role and self.content == other.content

    def __repr__(self):
        return f"ChatMessage({self.role!r}, {self.content!r})"


class ChatStatus:
    IDLE = "idle"
    GENERATING = "generating"
    DONE = "done"
    ERROR = "error"


class ChatMetrics:
    def __init__(self, *,
                 tokens_per_sec: float = 0.0,
                 ttft_ms: float = 0.0,
                 prompt_tokens: int = 0,
                 gen_tokens: int = 0,
                 total_duration_ms: float = 0.0,
                 load_duration_ms: float = 0.0,
                 ):
        self.tokens_per_sec = tokens_per_sec
        self.ttft_ms = ttft_ms
        self.prompt_tokens = prompt_tokens
        self.gen_tokens = gen_tokens
        self.total_duration_ms = total_duration_ms
        self.load_duration_ms = load_duration_ms

    def __repr__(self):
        return (f"ChatMetrics(tps={self.tokens_per_sec:.1f}, ttft={self.ttft_ms:.0f}ms, "
                f"prompt={self.prompt_tokens}, gen={self.gen_tokens})")


def metrics_from_done(ev: dict) -> ChatMetrics:
    # Durations arrive in nanoseconds; TTFT is not part of the final line
    eval_count = int(ev.get("eval_count") or 0)
    eval_ns = int(ev.get("eval_duration") or 0) or 1
    return ChatMetrics(
        tokens_per_sec=eval_count * 1e9 / eval_ns,
        prompt_tokens=int(ev.get("prompt_eval_count") or 0),
        gen_tokens=eval_count,
        total_duration_ms=int(ev.get("total_duration") or 0) / NS_PER_MS,
        load_duration_ms=int(ev.get("load_duration") or 0) / NS_PER_MS,
    )


class ChatEvent:
    FIRST_TOKEN = "first_token"
    TOKEN = "token"
    DONE = "done"
    ERROR = "error"

    def __init__(self, kind: str, text: str = "", ttft_ms: float = 0.0,
                 metrics: Optional[ChatMetrics] = None, message: Optional[str] = None):
        self.kind = kind
        self.text = text
        self.ttft_ms = ttft_ms
        self.metrics = metrics
        self.message = message

    @classmethod
    def first_token(cls, text: str, ttft_ms: float) -> "ChatEvent":
        return cls(cls.FIRST_TOKEN, text=text, ttft_ms=ttft_ms)

    @classmethod
    def token(cls, text: str) -> "ChatEvent":
        return cls(cls.TOKEN, text=text)

    @classmethod
    def done(cls, metrics: ChatMetrics) -> "ChatEvent":
        return cls(cls.DONE, metrics=metrics)

    @classmethod
    def error(cls, message: str) -> "ChatEvent":
        return cls(cls.ERROR, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (self.DONE, self.ERROR)

    def __repr__(self):
        return f"ChatEvent({self.kind!r}, text={self.text!r}, message={self.message!r})"


def outgoing_messages(messages: Sequence[ChatMessage]) -> List[dict]:
    """Messages as sent to the daemon, minus the trailing empty assistant placeholder."""
    out = [m.to_json() for m in messages]
    while out and out[-1]["role"] == ChatMessage.ASSISTANT and not out[-1]["content"]:
        out.pop()
    return out


class ChatWorker(StreamWorker):
    name = "chat"

    def __init__(self, client: OllamaClient, model: str, messages: Sequence[ChatMessage]):
        super().__init__()
        self.client = client
        self.model = model
        self.messages = outgoing_messages(messages)

    def failure(self, message: str) -> ChatEvent:
        return ChatEvent.error(message)

    def run(self) -> None:
        log.debug("chat with %s (%d messages)", self.model, len(self.messages))
        started = time.monotonic()
        try:
            r = self.client.chat_stream(self.model, self.messages)
        except requests.RequestException as e:
            self.emit(ChatEvent.error(f"Chat failed: {e}"))
            return
        with r:
            if not r.ok:
                self.emit(ChatEvent.error(error_message(r)))
                return
            got_delta = False
            try:
                for line in r.iter_lines():
                    if self.cancelled:
                        log.debug("chat with %s abandoned", self.model)
                        return
                    ev = decode_line(line)
                    if ev is None:
                        continue
                    if ev.get("error"):
                        self.emit(ChatEvent.error(str(ev["error"])))
                        return
                    if ev.get("done"):
                        self.emit(ChatEvent.done(metrics_from_done(ev)))
                        return
                    message = ev.get("message")
                    if not isinstance(message, dict):
                        continue
                    content = message.get("content")
                    if not isinstance(content, str) or not content:
                        continue
                    if not got_delta:
                        got_delta = True
                        ttft_ms = (time.monotonic() - started) * 1000.0
                        self.emit(ChatEvent.first_token(content, ttft_ms))
                    else:
                        self.emit(ChatEvent.token(content))
            except (requests.RequestException, OSError) as e:
                self.emit(ChatEvent.error(f"Chat failed: {e}"))
                return
        if got_delta:
            # Stream closed early; keep what arrived
            self.emit(ChatEvent.done(ChatMetrics()))
        else:
            self.emit(ChatEvent.error(NO_RESPONSE))
