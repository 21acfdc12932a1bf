import logging
import queue
import threading
from typing import Any, List, Optional

log = logging.getLogger(__name__)

# Put on the queue when run() returns, whatever happened inside it
_CLOSED = object()


class StreamWorker:
    """One streaming network operation running on its own daemon thread.

    The thread only ever writes into its queue; the owner drains it with
    poll() from the UI thread. Dropping the worker is the cancellation
    model: the thread may keep running but nobody reads what it emits.
    """

    name = "worker"

    def __init__(self):
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._cancel = threading.Event()
        self.closed = False

    def run(self) -> None:
        raise NotImplementedError

    def failure(self, message: str) -> Any:
        """Terminal event used when run() blows up unexpectedly."""
        raise NotImplementedError

    def start(self) -> "StreamWorker":
        self._thread = threading.Thread(target=self.execute, name=self.name, daemon=True)
        self._thread.start()
        return self

    def execute(self) -> None:
        # Thread target; also callable directly to run the body on this thread
        try:
            self.run()
        except Exception as e:
            log.exception("%s crashed", self.name)
            self.emit(self.failure(str(e)))
        finally:
            self._queue.put(_CLOSED)

    def emit(self, event: Any) -> None:
        self._queue.put(event)

    def cancel(self) -> None:
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def poll(self) -> List[Any]:
        """Return every event available right now, in emit order. Never blocks."""
        events = []
        while True:
            try:
                ev = self._queue.get_nowait()
            except queue.Empty:
                break
            if ev is _CLOSED:
                self.closed = True
                break
            events.append(ev)
        return events
