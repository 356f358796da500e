"""Poll Loop: periodic catch-up scan that advances the checkpoint.

Every POLL_INTERVAL seconds a tick reads the chain height and, if it is ahead
of the checkpoint, scans (checkpoint + 1, height). Ticks never overlap: a
tick that fires while the previous one is still running is skipped.

A tick also retries dead-lettered events on the pipeline worker, scans the
history owed to contracts those retries registered, and re-opens any live
subscription that is missing.
"""

import threading
from pathlib import Path

from src.chain.reader import BaseChainReader
from src.indexer.checkpoint import CheckpointStore
from src.indexer.listener import LiveListener
from src.indexer.pipeline import EventPipeline
from src.indexer.registry import ContractRegistry
from src.indexer.scanner import BackfillScanner, ScanResult
from src.shared.config import Config
from src.shared.exceptions import ChainReadError, CheckpointRegressionError
from src.shared.utils import setup_logger


class PollLoop:
    def __init__(
        self,
        chain_reader: BaseChainReader,
        scanner: BackfillScanner,
        checkpoint: CheckpointStore,
        pipeline: EventPipeline | None = None,
        listener: LiveListener | None = None,
        registry: ContractRegistry | None = None,
        interval: float | None = None,
        log_file: Path | None = None,
    ) -> None:
        self.chain_reader = chain_reader
        self.scanner = scanner
        self.checkpoint = checkpoint
        self.pipeline = pipeline
        self.listener = listener
        self.registry = registry
        self.interval = interval if interval is not None else Config.POLL_INTERVAL
        self.logger = setup_logger(self.__class__.__name__, log_file)
        self._tick_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self.last_result: ScanResult | None = None

    def tick(self) -> bool:
        """Run one catch-up pass.

        Returns:
            False if a previous tick was still running and this one was skipped.

        Raises:
            ChainReadError: The height or log query failed; checkpoint unchanged.
            CheckpointRegressionError: The checkpoint store refused a commit.
        """
        if not self._tick_lock.acquire(blocking=False):
            self.logger.debug("Previous tick still running; skipping")
            return False
        try:
            self._tick()
            return True
        finally:
            self._tick_lock.release()

    def _tick(self) -> None:
        height = self.chain_reader.current_height()
        committed = self.checkpoint.get()
        from_block = committed + 1 if committed is not None else height
        if from_block <= height:
            self.last_result = self.scanner.scan(from_block, height, self.checkpoint)

        if self.pipeline is not None:
            recovered = self.pipeline.retry_failed()
            if recovered:
                self.logger.info("Recovered %d failed events", recovered)

        caught_up = self.scanner.catch_up(self.checkpoint)
        if caught_up is not None:
            self.logger.info("Caught up %d events behind the checkpoint", caught_up.applied)

        if self.listener is not None and self.registry is not None:
            self.listener.sync(self.registry.list())

    # ------------------------------------------------------------------
    # Timer thread
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="poll-loop", daemon=True)
        self._thread.start()
        self.logger.info("Poll loop started (interval=%.1fs)", self.interval)

    def stop(self, timeout: float | None = None) -> None:
        """Stop the timer; an in-flight tick runs to completion."""
        self._stop.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout)
        self._thread = None
        self.logger.info("Poll loop stopped")

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self.tick()
            except ChainReadError as exc:
                self.logger.warning("Poll tick failed, will retry next interval: %s", exc)
            except CheckpointRegressionError as exc:
                self.logger.critical("Stopping poll loop: %s", exc)
                return
            except Exception:
                self.logger.exception("Unexpected error in poll tick")
