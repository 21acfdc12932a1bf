import logging
import threading
from typing import Callable, Dict, List, Optional, Sequence

import requests

from ai_services import (
    OLLAMA,
    DetectedService,
    ProcessInfo,
    aggregate_usage,
    detect_services,
    filter_ai_processes,
)
from chat_worker import ChatEvent, ChatMessage, ChatMetrics, ChatStatus, ChatWorker
from library_search import SearchEvent, SearchResult, SearchWorker
from metric_history import History
from network_client import DEFAULT_SEARCH_URL
from ollama_client import InstalledModel, ModelPoller, OllamaClient, RunningModel
from pull_worker import PullStatus, PullWorker
from workers import StreamWorker

log = logging.getLogger(__name__)

WORKER_EXITED = "worker exited unexpectedly"
SEARCHING = "Searching..."


def format_bytes(n: int) -> str:
    size = float(n)
    for unit, step in (("TiB", 1024 ** 4), ("GiB", 1024 ** 3), ("MiB", 1024 ** 2)):
        if size >= step:
            return f"{size / step:.2f} {unit}"
    if size >= 1024:
        return f"{size / 1024:.1f} KiB"
    return f"{int(n)} B"


def clamp_index(index: int, length: int) -> int:
    if length <= 0:
        return 0
    return max(0, min(index, length - 1))


class AiMetrics:
    """Owns everything the AI panel shows.

    Call update() once per refresh tick from the UI thread. User actions
    (pull, chat, search, load/unload/delete) return immediately; their
    workers report back through queues that update() drains without
    blocking. Only this object mutates the state below.
    """

    def __init__(self, client: Optional[OllamaClient] = None,
                 search_url: str = DEFAULT_SEARCH_URL):
        self.client = client or OllamaClient()
        self.poller = ModelPoller(self.client)
        self.search_url = search_url

        self.services: List[DetectedService] = detect_services([])
        self.ollama_available = False
        self.ai_processes: List[ProcessInfo] = []
        self.aggregate_cpu = 0.0
        self.aggregate_memory = 0
        self.cpu_history = History()
        self.tps_history = History()
        self.model_selected = 0

        # pulls are tracked per model name
        self.pull_states: Dict[str, PullStatus] = {}
        self.pull_model: Optional[str] = None
        self._pulls: Dict[str, PullWorker] = {}

        self.chat_messages: List[ChatMessage] = []
        self.chat_status = ChatStatus.IDLE
        self.chat_error: Optional[str] = None
        self.chat_metrics: Optional[ChatMetrics] = None
        self.chat_model: Optional[str] = None
        self._chat_ttft_ms = 0.0
        self._chat_worker: Optional[ChatWorker] = None

        self.search_query = ""
        self.search_results: List[SearchResult] = []
        self.search_status: Optional[str] = None
        self.search_selected = 0
        self.show_search = False
        self._search_worker: Optional[SearchWorker] = None

    # --- registry views ---

    @property
    def ollama_version(self) -> Optional[str]:
        return self.poller.version

    @property
    def ollama_models(self) -> List[InstalledModel]:
        return self.poller.models

    @property
    def ollama_running(self) -> List[RunningModel]:
        return self.poller.running

    @property
    def pull_status(self) -> Optional[PullStatus]:
        if self.pull_model is None:
            return None
        return self.pull_states.get(self.pull_model)

    def pulls_in_flight(self) -> List[str]:
        return list(self._pulls)

    # --- tick ---

    def update(self, processes: Sequence[ProcessInfo], now: Optional[float] = None) -> None:
        self.services = detect_services(processes, self.poller.version)
        self.ollama_available = any(s.name == OLLAMA and s.detected for s in self.services)

        self.ai_processes = filter_ai_processes(processes)
        self.aggregate_cpu, self.aggregate_memory = aggregate_usage(self.ai_processes)

        self._drain_pulls()
        self._drain_chat()
        self._drain_search()

        if self.poller.maybe_refresh(self.ollama_available, now):
            self.model_selected = clamp_index(self.model_selected, len(self.poller.models))

        self.cpu_history.push(self.aggregate_cpu)

    def _drain_pulls(self) -> None:
        for name, worker in list(self._pulls.items()):
            finished = False
            for st in worker.poll():
                self.pull_states[name] = st
                if st.is_terminal:
                    finished = True
                    break
            if not finished and worker.closed:
                self.pull_states[name] = PullStatus.error(WORKER_EXITED)
                finished = True
            if finished:
                log.debug("pull of %s finished: %r", name, self.pull_states[name])
                del self._pulls[name]
                self.poller.invalidate()

    def _drain_chat(self) -> None:
        worker = self._chat_worker
        if worker is None:
            return
        for ev in worker.poll():
            if ev.kind == ChatEvent.FIRST_TOKEN:
                self._chat_ttft_ms = ev.ttft_ms
                self._append_assistant(ev.text)
            elif ev.kind == ChatEvent.TOKEN:
                self._append_assistant(ev.text)
            elif ev.kind == ChatEvent.DONE:
                metrics = ev.metrics or ChatMetrics()
                if not metrics.ttft_ms:
                    metrics.ttft_ms = self._chat_ttft_ms
                self.chat_metrics = metrics
                self.chat_status = ChatStatus.DONE
                # A stream cut short carries no counters
                if metrics.gen_tokens:
                    self.tps_history.push(metrics.tokens_per_sec)
                self._chat_worker = None
                return
            elif ev.kind == ChatEvent.ERROR:
                self._chat_failed(ev.message or "chat failed")
                return
        if worker.closed:
            self._chat_failed(WORKER_EXITED)

    def _chat_failed(self, message: str) -> None:
        self.chat_status = ChatStatus.ERROR
        self.chat_error = message
        self._chat_worker = None

    def _append_assistant(self, text: str) -> None:
        if not isinstance(text, str):
            return
        if self.chat_messages and self.chat_messages[-1].role == ChatMessage.ASSISTANT:
            self.chat_messages[-1].content += text

    def _drain_search(self) -> None:
        worker = self._search_worker
        if worker is None:
            return
        for ev in worker.poll():
            if ev.kind == SearchEvent.RESULTS:
                self.search_results = ev.results
                self.search_selected = 0
                if ev.results:
                    self.search_status = None
                else:
                    self.search_status = f"No models found for '{self.search_query}'"
            else:
                self.search_status = f"Search failed: {ev.message}"
            self._search_worker = None
            return
        if worker.closed:
            self.search_status = f"Search failed: {WORKER_EXITED}"
            self._search_worker = None

    # --- workers ---

    def _launch(self, worker: StreamWorker) -> None:
        worker.start()

    def start_pull(self, model_name: str) -> None:
        old = self._pulls.pop(model_name, None)
        if old is not None:
            old.cancel()
        # Keep in-flight pulls and the one on display; forget the rest
        self.pull_states = {n: st for n, st in self.pull_states.items()
                            if n in self._pulls or n == self.pull_model}
        self.pull_model = model_name
        self.pull_states[model_name] = PullStatus.progress("Starting pull...")
        worker = PullWorker(self.client, model_name)
        self._pulls[model_name] = worker
        self._launch(worker)

    def start_chat(self, model: str, messages: Sequence[ChatMessage]) -> None:
        if self._chat_worker is not None:
            self._chat_worker.cancel()
        self.chat_model = model
        self.chat_status = ChatStatus.GENERATING
        self.chat_error = None
        self.chat_metrics = None
        self._chat_ttft_ms = 0.0
        self._chat_worker = ChatWorker(self.client, model, messages)
        self._launch(self._chat_worker)

    def send_chat(self, prompt: str, model: Optional[str] = None) -> bool:
        prompt = prompt.strip()
        model = model or self.first_loaded_model_name()
        if not prompt or not model:
            return False
        self.chat_messages.append(ChatMessage(ChatMessage.USER, prompt))
        self.chat_messages.append(ChatMessage(ChatMessage.ASSISTANT, ""))
        self.start_chat(model, self.chat_messages)
        return True

    def cancel_chat(self) -> None:
        if self._chat_worker is not None:
            self._chat_worker.cancel()
            self._chat_worker = None
        if self.chat_status == ChatStatus.GENERATING:
            self.chat_status = ChatStatus.IDLE

    def clear_chat(self) -> None:
        self.cancel_chat()
        self.chat_messages = []
        self.chat_metrics = None
        self.chat_error = None
        self.chat_status = ChatStatus.IDLE

    def start_search(self, query: str) -> None:
        self.search_query = query
        self.search_results = []
        self.search_selected = 0
        self.search_status = SEARCHING
        self.show_search = True
        self._search_worker = SearchWorker(query, self.search_url)
        self._launch(self._search_worker)

    def dismiss_search(self) -> None:
        self.show_search = False

    def search_select_next(self) -> None:
        self.search_selected = clamp_index(self.search_selected + 1, len(self.search_results))

    def search_select_prev(self) -> None:
        self.search_selected = clamp_index(self.search_selected - 1, len(self.search_results))

    def selected_search_model(self) -> Optional[str]:
        if not self.search_results:
            return None
        return self.search_results[clamp_index(self.search_selected, len(self.search_results))].pull_target()

    def pull_search_result(self) -> Optional[str]:
        """Pull the highlighted search result and close the results view."""
        name = self.selected_search_model()
        if name is None:
            return None
        self.start_pull(name)
        self.dismiss_search()
        return name

    # --- fire and forget ---

    def _spawn(self, label: str, fn: Callable[[str], None], name: str) -> None:
        def run():
            try:
                fn(name)
            except requests.RequestException as e:
                log.debug("%s %s failed: %s", label, name, e)

        threading.Thread(target=run, name=label, daemon=True).start()

    def delete_model(self, name: str) -> None:
        self._spawn("delete", self.client.delete_model, name)
        self.poller.models = [m for m in self.poller.models if m.name != name]
        self.model_selected = clamp_index(self.model_selected, len(self.poller.models))
        self.poller.invalidate()

    def load_model(self, name: str) -> None:
        self._spawn("load", self.client.load_model, name)

    def unload_model(self, name: str) -> None:
        self._spawn("unload", self.client.unload_model, name)

    # --- selection / lookups ---

    def select_next(self) -> None:
        self.model_selected = clamp_index(self.model_selected + 1, len(self.poller.models))

    def select_prev(self) -> None:
        self.model_selected = clamp_index(self.model_selected - 1, len(self.poller.models))

    def selected_model_name(self) -> Optional[str]:
        if not self.poller.models:
            return None
        return self.poller.models[clamp_index(self.model_selected, len(self.poller.models))].name

    def model_status(self, name: str) -> str:
        return "Loaded" if self.poller.is_loaded(name) else "Ready"

    def model_vram(self, name: str) -> Optional[str]:
        running = self.poller.running_model(name)
        return format_bytes(running.size_vram) if running else None

    def has_loaded_model(self) -> bool:
        return bool(self.poller.running)

    def first_loaded_model_name(self) -> Optional[str]:
        return self.poller.running[0].name if self.poller.running else None
