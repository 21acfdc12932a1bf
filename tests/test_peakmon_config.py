from network_client import DEFAULT_OLLAMA_HOST, DEFAULT_SEARCH_URL
from peakmon_config import (
    DEFAULT_REFRESH_MS,
    load_config,
    normalize_host,
    resolve_settings,
    save_config,
)


def test_defaults():
    s = resolve_settings(cfg={}, env={})
    assert s.ollama_host == DEFAULT_OLLAMA_HOST
    assert s.search_url == DEFAULT_SEARCH_URL
    assert s.refresh_rate_ms == DEFAULT_REFRESH_MS
    assert s.refresh_secs == 1.0


def test_precedence_file_env_args():
    cfg = {"ollama_host": "http://gpu-box:11434", "refresh_rate_ms": 2000}
    assert resolve_settings(cfg=cfg, env={}).ollama_host == "http://gpu-box:11434"
    s = resolve_settings(cfg=cfg, env={"OLLAMA_HOST": "10.0.0.5"})
    assert s.ollama_host == "http://10.0.0.5:11434"
    assert s.refresh_rate_ms == 2000
    s = resolve_settings(cfg=cfg, env={"OLLAMA_HOST": "10.0.0.5"},
                         ollama_host="http://other:8080", refresh_rate_ms=500)
    assert s.ollama_host == "http://other:8080"
    assert s.refresh_rate_ms == 500


def test_refresh_rate_is_clamped():
    assert resolve_settings(cfg={}, env={}, refresh_rate_ms=10).refresh_rate_ms == 250
    assert resolve_settings(cfg={}, env={}, refresh_rate_ms=99999).refresh_rate_ms == 10000
    assert resolve_settings(cfg={"refresh_rate_ms": "fast"}, env={}).refresh_rate_ms == DEFAULT_REFRESH_MS


def test_normalize_host():
    assert normalize_host("127.0.0.1:11434") == "http://127.0.0.1:11434"
    assert normalize_host("localhost") == "http://localhost:11434"
    assert normalize_host("https://ollama.example.com/") == "https://ollama.example.com"


def test_config_round_trip(tmp_path):
    path = str(tmp_path / "peakmon" / "config.json")
    assert load_config(path) == {}
    save_config({"refresh_rate_ms": 750}, path)
    assert load_config(path) == {"refresh_rate_ms": 750}


def test_bad_config_file_is_ignored(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("[not, an, object", encoding="utf-8")
    assert load_config(str(path)) == {}
