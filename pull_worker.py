import logging
from typing import Optional

import requests

from network_client import decode_line, error_message
from ollama_client import OllamaClient
from workers import StreamWorker

log = logging.getLogger(__name__)

NO_RESPONSE = "no response / invalid model name"


class PullStatus:
    PROGRESS = "progress"
    DONE = "done"
    ERROR = "error"

    def __init__(self, kind: str, status: str = "", percent: Optional[float] = None,
                 message: Optional[str] = None):
        self.kind = kind
        self.status = status
        self.percent = percent
        self.message = message

    @classmethod
    def progress(cls, status: str, percent: Optional[float] = None) -> "PullStatus":
        return cls(cls.PROGRESS, status=status, percent=percent)

    @classmethod
    def done(cls) -> "PullStatus":
        return cls(cls.DONE)

    @classmethod
    def error(cls, message: str) -> "PullStatus":
        return cls(cls.ERROR, message=message)

    @property
    def is_terminal(self) -> bool:
        return self.kind in (self.DONE, self.ERROR)

    def __eq__(self, other):
        if not isinstance(other, PullStatus):
            return NotImplemented
        return (self.kind, self.status, self.percent, self.message) == \
            (other.kind, other.status, other.percent, other.message)

    def __repr__(self):
        if self.kind == self.PROGRESS:
            return f"PullStatus.progress({self.status!r}, {self.percent!r})"
        if self.kind == self.ERROR:
            return f"PullStatus.error({self.message!r})"
        return "PullStatus.done()"


def parse_pull_line(raw) -> Optional[PullStatus]:
    """Turn one NDJSON progress line into a status, or None if it is unreadable."""
    ev = decode_line(raw)
    if ev is None:
        return None
    if ev.get("error"):
        return PullStatus.error(str(ev["error"]))
    status = str(ev.get("status") or "")
    if "success" in status:
        return PullStatus.done()
    total = ev.get("total")
    completed = ev.get("completed")
    percent = None
    if isinstance(total, (int, float)) and isinstance(completed, (int, float)) and total > 0:
        percent = completed * 100.0 / total
    return PullStatus.progress(status, percent)


class PullWorker(StreamWorker):
    name = "pull"

    def __init__(self, client: OllamaClient, model_name: str):
        super().__init__()
        self.client = client
        self.model_name = model_name

    def failure(self, message: str) -> PullStatus:
        return PullStatus.error(message)

    def run(self) -> None:
        log.debug("pulling %s", self.model_name)
        try:
            r = self.client.pull_stream(self.model_name)
        except requests.RequestException as e:
            self.emit(PullStatus.error(f"Pull failed: {e}"))
            return
        with r:
            if not r.ok:
                self.emit(PullStatus.error(error_message(r)))
                return
            seen_status = False
            try:
                for line in r.iter_lines():
                    if self.cancelled:
                        log.debug("pull of %s abandoned", self.model_name)
                        return
                    st = parse_pull_line(line)
                    if st is None:
                        continue
                    self.emit(st)
                    if st.is_terminal:
                        return
                    if st.status:
                        seen_status = True
            except (requests.RequestException, OSError) as e:
                self.emit(PullStatus.error(f"Pull failed: {e}"))
                return
        self.emit(PullStatus.done() if seen_status else PullStatus.error(NO_RESPONSE))
