import json
import os
from typing import Optional

from network_client import DEFAULT_OLLAMA_HOST, DEFAULT_SEARCH_URL

CONFIG_DIR = os.path.join(os.path.expanduser("~"), ".config", "peakmon")
CONFIG_PATH = os.path.join(CONFIG_DIR, "config.json")

DEFAULT_REFRESH_MS = 1000
MIN_REFRESH_MS = 250
MAX_REFRESH_MS = 10000


def load_config(path: str = CONFIG_PATH) -> dict:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def save_config(cfg: dict, path: str = CONFIG_PATH) -> None:
    os.makedirs(os.path.dirname(path), exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(cfg, f, indent=2)


def normalize_host(host: str) -> str:
    # OLLAMA_HOST is often just "127.0.0.1:11434"
    host = host.strip().rstrip("/")
    if "://" in host:
        return host
    netloc, sep, path = host.partition("/")
    if ":" not in netloc:
        netloc += ":11434"
    return f"http://{netloc}{sep}{path}"


def clamp_refresh(ms: int) -> int:
    return max(MIN_REFRESH_MS, min(int(ms), MAX_REFRESH_MS))


class Settings:
    def __init__(self, ollama_host: str = DEFAULT_OLLAMA_HOST,
                 search_url: str = DEFAULT_SEARCH_URL,
                 refresh_rate_ms: int = DEFAULT_REFRESH_MS):
        self.ollama_host = ollama_host
        self.search_url = search_url
        self.refresh_rate_ms = refresh_rate_ms

    @property
    def refresh_secs(self) -> float:
        return self.refresh_rate_ms / 1000.0

    def to_dict(self) -> dict:
        return {
            "ollama_host": self.ollama_host,
            "search_url": self.search_url,
            "refresh_rate_ms": self.refresh_rate_ms,
        }


def resolve_settings(cfg: Optional[dict] = None, env: Optional[dict] = None,
                     refresh_rate_ms: Optional[int] = None,
                     ollama_host: Optional[str] = None) -> Settings:
    """Defaults, then the config file, then the environment, then explicit arguments."""
    cfg = load_config() if cfg is None else cfg
    env = os.environ if env is None else env

    host = cfg.get("ollama_host") or DEFAULT_OLLAMA_HOST
    if env.get("OLLAMA_HOST", "").strip():
        host = env["OLLAMA_HOST"]
    if ollama_host:
        host = ollama_host

    rate = cfg.get("refresh_rate_ms", DEFAULT_REFRESH_MS)
    if refresh_rate_ms is not None:
        rate = refresh_rate_ms
    try:
        rate = clamp_refresh(rate)
    except (TypeError, ValueError):
        rate = DEFAULT_REFRESH_MS

    return Settings(
        ollama_host=normalize_host(host),
        search_url=str(cfg.get("search_url") or DEFAULT_SEARCH_URL),
        refresh_rate_ms=rate,
    )
