import json
from typing import Dict, Optional, Tuple

import requests

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_SEARCH_URL = "https://ollama.com/search"

API_HEADERS = {"User-Agent": "peakmon/0.4", "Accept": "application/json"}
SEARCH_HEADERS = {"User-Agent": "peakmon/0.4", "Accept": "text/html"}

# (connect, read) seconds per kind of call
POLL_TIMEOUT: Tuple[float, float] = (0.2, 1.0)
PULL_TIMEOUT: Tuple[float, float] = (5.0, 600.0)
CHAT_TIMEOUT: Tuple[float, float] = (2.0, 300.0)
SEARCH_TIMEOUT: Tuple[float, float] = (3.0, 10.0)
DELETE_TIMEOUT: Tuple[float, float] = (0.2, 10.0)
LOAD_TIMEOUT: Tuple[float, float] = (0.2, 60.0)
UNLOAD_TIMEOUT: Tuple[float, float] = (0.2, 5.0)


def api_headers() -> Dict[str, str]:
    return dict(API_HEADERS)


def get_json(url: str, timeout: Tuple[float, float] = POLL_TIMEOUT) -> dict:
    """Single attempt GET; raises on network errors, non-2xx or a non-object body."""
    r = requests.get(url, headers=api_headers(), timeout=timeout)
    r.raise_for_status()
    data = r.json()
    if not isinstance(data, dict):
        raise ValueError(f"Unexpected response from {url}")
    return data


def error_message(r: requests.Response) -> str:
    # Ollama reports failures as {"error": "..."}, sometimes as the first NDJSON line
    try:
        text = r.text or ""
    except (requests.RequestException, UnicodeDecodeError):
        text = ""
    for line in text.splitlines() or [text]:
        line = line.strip()
        if not line:
            continue
        try:
            obj = json.loads(line)
        except ValueError:
            continue
        if isinstance(obj, dict) and obj.get("error"):
            return str(obj["error"])
    return f"HTTP {r.status_code}"


def decode_line(raw) -> Optional[dict]:
    if not raw:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8", errors="replace")
    raw = raw.strip()
    if not raw:
        return None
    try:
        obj = json.loads(raw)
    except ValueError:
        return None
    return obj if isinstance(obj, dict) else None
