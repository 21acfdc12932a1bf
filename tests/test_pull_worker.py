import requests

from conftest import FakeResponse
from network_client import PULL_TIMEOUT
from ollama_client import OllamaClient
from pull_worker import NO_RESPONSE, PullStatus, PullWorker, parse_pull_line


def run_pull(name="phi3"):
    worker = PullWorker(OllamaClient(), name)
    worker.execute()
    return worker, worker.poll()


def test_percent_from_counts():
    st = parse_pull_line('{"status":"downloading","total":100,"completed":25}')
    assert st == PullStatus.progress("downloading", 25.0)


def test_success_is_done():
    assert parse_pull_line(b'{"status":"success"}') == PullStatus.done()


def test_error_field():
    assert parse_pull_line('{"error":"model not found"}') == PullStatus.error("model not found")


def test_no_percent_without_total():
    assert parse_pull_line('{"status":"pulling manifest"}').percent is None
    assert parse_pull_line('{"status":"x","total":0,"completed":0}').percent is None
    assert parse_pull_line('{"status":"x","completed":10}').percent is None


def test_unreadable_lines_are_skipped():
    assert parse_pull_line("") is None
    assert parse_pull_line("{not json") is None
    assert parse_pull_line("[1, 2]") is None


def test_stream_to_done(fake_http):
    rec = fake_http("post", {"/api/pull": FakeResponse(lines=[
        {"status": "pulling manifest"},
        {"status": "downloading", "total": 200, "completed": 50},
        "garbage",
        {"status": "success"},
        {"status": "never read"},
    ])})
    worker, events = run_pull("phi3")
    assert events == [
        PullStatus.progress("pulling manifest"),
        PullStatus.progress("downloading", 25.0),
        PullStatus.done(),
    ]
    assert worker.closed
    url, kwargs = rec.calls[0]
    assert url.endswith("/api/pull")
    assert kwargs["json"] == {"name": "phi3", "stream": True}
    assert kwargs["stream"] is True
    assert kwargs["timeout"] == PULL_TIMEOUT


def test_error_line_stops_stream(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(lines=[
        {"status": "pulling manifest"},
        {"error": "pull model manifest: file does not exist"},
        {"status": "success"},
    ])})
    _, events = run_pull()
    assert events[-1] == PullStatus.error("pull model manifest: file does not exist")
    assert len(events) == 2


def test_stream_end_after_status_is_done(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(lines=[{"status": "verifying sha256 digest"}])})
    _, events = run_pull()
    assert events[-1] == PullStatus.done()


def test_empty_stream_is_error(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(lines=[])})
    _, events = run_pull()
    assert events == [PullStatus.error(NO_RESPONSE)]


def test_http_error_uses_structured_body(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(status_code=404, body={"error": "model not found"})})
    _, events = run_pull()
    assert events == [PullStatus.error("model not found")]


def test_http_error_without_body(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(status_code=503, text="")})
    _, events = run_pull()
    assert events == [PullStatus.error("HTTP 503")]


def test_connection_failure(fake_http):
    fake_http("post", {"/api/pull": requests.ConnectionError("refused")})
    _, events = run_pull()
    assert len(events) == 1
    assert events[0].kind == PullStatus.ERROR
    assert events[0].message.startswith("Pull failed:")


def test_read_error_mid_stream(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(lines=[
        {"status": "downloading", "total": 10, "completed": 1},
        requests.ConnectionError("reset"),
    ])})
    _, events = run_pull()
    assert events[0].kind == PullStatus.PROGRESS
    assert events[-1].kind == PullStatus.ERROR


def test_cancelled_worker_stops_reading(fake_http):
    fake_http("post", {"/api/pull": FakeResponse(lines=[{"status": "a"}, {"status": "b"}])})
    worker = PullWorker(OllamaClient(), "phi3")
    worker.cancel()
    worker.execute()
    assert worker.poll() == []
    assert worker.closed
