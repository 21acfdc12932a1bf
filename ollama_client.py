import logging
import time
from typing import List, Optional

import requests

from network_client import (
    DEFAULT_OLLAMA_HOST,
    CHAT_TIMEOUT,
    DELETE_TIMEOUT,
    LOAD_TIMEOUT,
    POLL_TIMEOUT,
    PULL_TIMEOUT,
    UNLOAD_TIMEOUT,
    api_headers,
    get_json,
)

log = logging.getLogger(__name__)

API_CACHE_SECS = 5.0

# Anything a single poll request can fail with; the previous value is kept
POLL_ERRORS = (requests.RequestException, ValueError, KeyError, TypeError, AttributeError)


class InstalledModel:
    def __init__(self, name: str, size: int = 0, quantization: Optional[str] = None):
        self.name = name
        self.size = size
        self.quantization = quantization

    @classmethod
    def from_json(cls, m: dict) -> "InstalledModel":
        details = m.get("details") or {}
        return cls(
            name=str(m["name"]),
            size=int(m.get("size") or 0),
            quantization=details.get("quantization_level") if isinstance(details, dict) else None,
        )

    def __repr__(self):
        return f"InstalledModel({self.name!r}, size={self.size})"


class RunningModel:
    def __init__(self, name: str, size_vram: int = 0):
        self.name = name
        self.size_vram = size_vram

    @classmethod
    def from_json(cls, m: dict) -> "RunningModel":
        return cls(name=str(m["name"]), size_vram=int(m.get("size_vram") or 0))

    def __repr__(self):
        return f"RunningModel({self.name!r}, vram={self.size_vram})"


class OllamaClient:
    def __init__(self, base_url: str = DEFAULT_OLLAMA_HOST):
        self.base_url = base_url.rstrip("/")

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def version(self) -> str:
        data = get_json(self.url("/api/version"), timeout=POLL_TIMEOUT)
        return str(data["version"])

    def list_models(self) -> List[InstalledModel]:
        data = get_json(self.url("/api/tags"), timeout=POLL_TIMEOUT)
        return [InstalledModel.from_json(m) for m in data.get("models") or []]

    def list_running(self) -> List[RunningModel]:
        data = get_json(self.url("/api/ps"), timeout=POLL_TIMEOUT)
        return [RunningModel.from_json(m) for m in data.get("models") or []]

    def delete_model(self, name: str) -> None:
        r = requests.delete(self.url("/api/delete"), json={"name": name},
                            headers=api_headers(), timeout=DELETE_TIMEOUT)
        r.raise_for_status()

    def load_model(self, name: str) -> None:
        # An empty prompt makes the daemon load the model without generating
        r = requests.post(self.url("/api/generate"), json={"model": name, "prompt": ""},
                          headers=api_headers(), timeout=LOAD_TIMEOUT)
        r.raise_for_status()

    def unload_model(self, name: str) -> None:
        r = requests.post(self.url("/api/generate"),
                          json={"model": name, "prompt": "", "keep_alive": 0},
                          headers=api_headers(), timeout=UNLOAD_TIMEOUT)
        r.raise_for_status()

    def pull_stream(self, name: str) -> requests.Response:
        # Caller owns the response and reads it with iter_lines()
        return requests.post(self.url("/api/pull"), json={"name": name, "stream": True},
                             headers=api_headers(), stream=True, timeout=PULL_TIMEOUT)

    def chat_stream(self, model: str, messages: List[dict]) -> requests.Response:
        return requests.post(self.url("/api/chat"),
                             json={"model": model, "messages": messages, "stream": True},
                             headers=api_headers(), stream=True, timeout=CHAT_TIMEOUT)


class ModelPoller:
    """Cached view of the daemon's version, installed models and running models.

    Refreshes at most once every ``cache_secs``. Each of the three requests
    is independent: a failed one leaves its previous value in place.
    """

    def __init__(self, client: OllamaClient, cache_secs: float = API_CACHE_SECS):
        self.client = client
        self.cache_secs = cache_secs
        self.version: Optional[str] = None
        self.models: List[InstalledModel] = []
        self.running: List[RunningModel] = []
        self.last_check: Optional[float] = None

    def is_due(self, now: float) -> bool:
        return self.last_check is None or now - self.last_check >= self.cache_secs

    def invalidate(self) -> None:
        self.last_check = None

    def maybe_refresh(self, available: bool, now: Optional[float] = None) -> bool:
        now = time.monotonic() if now is None else now
        if not self.is_due(now):
            return False
        self.last_check = now
        if not available:
            self.models = []
            self.running = []
            self.version = None
            return True
        self.refresh()
        return True

    def refresh(self) -> None:
        try:
            self.version = self.client.version()
        except POLL_ERRORS as e:
            log.debug("version check failed: %s", e)
        try:
            self.models = self.client.list_models()
        except POLL_ERRORS as e:
            log.debug("tags request failed: %s", e)
        try:
            self.running = self.client.list_running()
        except POLL_ERRORS as e:
            log.debug("ps request failed: %s", e)

    def is_loaded(self, name: str) -> bool:
        return any(r.name == name for r in self.running)

    def running_model(self, name: str) -> Optional[RunningModel]:
        return next((r for r in self.running if r.name == name), None)
