"""Single-consumer event pipeline.

Both producers (the backfill scanner and the live listener) publish decoded
events here; one worker thread applies them through the dispatcher, so at
most one projection runs at a time. The scanner publishes whole batches and
blocks until the batch has been applied, which is what lets it commit the
checkpoint afterwards.

Dead-letter retries run on the worker too, as a queued job, so the worker
stays the only thread applying events.

When the worker is not running, events are applied inline on the caller's
thread (single-shot runs and tests).
"""

import queue
import threading
from pathlib import Path
from typing import Any, Callable, Iterable

from src.chain.decoder import DecodedEvent
from src.indexer.dispatcher import EventDispatcher
from src.shared.utils import setup_logger

_STOP = object()


class _Batch:
    """Countdown for one published batch."""

    def __init__(self, size: int) -> None:
        self.remaining = size
        self.succeeded = 0
        self._lock = threading.Lock()
        self._done = threading.Event()
        if size == 0:
            self._done.set()

    def mark(self, ok: bool) -> None:
        with self._lock:
            self.remaining -= 1
            if ok:
                self.succeeded += 1
            if self.remaining <= 0:
                self._done.set()

    def wait(self, timeout: float | None = None) -> bool:
        return self._done.wait(timeout)


class _Job:
    """A callable run on the worker thread; the caller waits for its result."""

    def __init__(self, func: Callable[[], Any]) -> None:
        self.func = func
        self.result: Any = None
        self.error: BaseException | None = None
        self._done = threading.Event()

    def run(self) -> None:
        try:
            self.result = self.func()
        except Exception as exc:
            self.error = exc
        finally:
            self._done.set()

    def wait(self) -> Any:
        self._done.wait()
        if self.error is not None:
            raise self.error
        return self.result


class EventPipeline:
    """FIFO queue in front of the dispatcher, drained by one worker thread."""

    def __init__(self, dispatcher: EventDispatcher, log_file: Path | None = None) -> None:
        self.dispatcher = dispatcher
        self.logger = setup_logger(self.__class__.__name__, log_file)
        self._queue: queue.Queue = queue.Queue()
        self._lock = threading.Lock()
        self._worker: threading.Thread | None = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            self._worker = threading.Thread(target=self._run, name="event-pipeline", daemon=True)
            self._running = True
            self._worker.start()
        self.logger.info("Event pipeline started")

    def stop(self, timeout: float | None = None) -> None:
        """Stop accepting events, drain what is queued, then stop the worker."""
        with self._lock:
            if not self._running:
                return
            self._running = False
            self._queue.put(_STOP)
        if self._worker is not None:
            self._worker.join(timeout)
        self.logger.info("Event pipeline stopped")

    def drain(self) -> None:
        """Block until every queued event has been applied."""
        self._queue.join()

    def publish(self, event: DecodedEvent) -> None:
        """Queue one event without waiting for it to be applied."""
        with self._lock:
            if self._running:
                self._queue.put((None, event))
                return
        self.dispatcher.dispatch_event(event)

    def publish_batch(self, events: Iterable[DecodedEvent]) -> int:
        """Apply `events` in order and wait until all of them are done.

        Returns:
            Number of events that were applied successfully.
        """
        events = list(events)
        with self._lock:
            if self._running:
                batch = _Batch(len(events))
                for event in events:
                    self._queue.put((batch, event))
            else:
                batch = None

        if batch is None:
            return sum(1 for event in events if self.dispatcher.dispatch_event(event))

        batch.wait()
        return batch.succeeded

    def retry_failed(self) -> int:
        """Retry dead-lettered events on the worker and wait for the outcome.

        Returns:
            Number of events that succeeded on this pass.
        """
        return self._call(self.dispatcher.retry_failed)

    def _call(self, func: Callable[[], Any]) -> Any:
        with self._lock:
            if self._running:
                job = _Job(func)
                self._queue.put(job)
            else:
                job = None
        if job is None:
            return func()
        return job.wait()

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _STOP:
                    return
                if isinstance(item, _Job):
                    item.run()
                    continue
                batch, event = item
                ok = False
                try:
                    ok = self.dispatcher.dispatch_event(event)
                except Exception:
                    self.logger.exception("Dispatcher raised for %s", event.describe())
                finally:
                    if batch is not None:
                        batch.mark(ok)
            finally:
                self._queue.task_done()
