import json
import time
from pathlib import Path

import pytest
import requests

FIXTURES = Path(__file__).parent / "fixtures"


class FakeResponse:
    def __init__(self, status_code=200, lines=None, text=None, body=None):
        self.status_code = status_code
        self._lines = lines or []
        if body is not None:
            text = json.dumps(body)
        self.text = text if text is not None else "\n".join(
            l if isinstance(l, str) else json.dumps(l)
            for l in self._lines if not isinstance(l, Exception))
        self.closed = False

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    def raise_for_status(self):
        if not self.ok:
            raise requests.HTTPError(f"{self.status_code} Error")

    def json(self):
        return json.loads(self.text)

    def iter_lines(self):
        for line in self._lines:
            if isinstance(line, Exception):
                raise line
            if not isinstance(line, str):
                line = json.dumps(line)
            yield line.encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.closed = True
        return False


class Recorder:
    """Stands in for requests.get/post/delete, answering by URL suffix."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        for suffix, answer in self.routes.items():
            if url.endswith(suffix) or suffix in url:
                if isinstance(answer, Exception):
                    raise answer
                if callable(answer):
                    return answer(url, **kwargs)
                return answer
        raise requests.ConnectionError(f"no route for {url}")


@pytest.fixture
def fake_http(monkeypatch):
    recorders = {}

    def install(method, routes):
        rec = Recorder(routes)
        monkeypatch.setattr(requests, method, rec)
        recorders[method] = rec
        return rec

    return install


@pytest.fixture
def fixture_text():
    def read(name):
        return (FIXTURES / name).read_text(encoding="utf-8")
    return read


def wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()
