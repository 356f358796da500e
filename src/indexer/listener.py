"""Live Listener: push subscriptions for every watched contract.

Each delivered log is decoded and published to the pipeline without waiting.
The listener never touches the checkpoint; the poll loop's range scan is what
advances it, so anything the subscriptions miss is picked up there.
"""

import threading
from functools import partial
from pathlib import Path
from typing import Iterable

from src.chain.decoder import EventDecoder, RawEvent
from src.chain.reader import BaseChainReader, Subscription
from src.chain.schema import topics_for
from src.indexer.pipeline import EventPipeline
from src.indexer.registry import WatchedContract
from src.shared.exceptions import ChainReadError, DecodeError
from src.shared.utils import setup_logger


class LiveListener:
    def __init__(
        self,
        chain_reader: BaseChainReader,
        pipeline: EventPipeline,
        decoder: EventDecoder | None = None,
        log_file: Path | None = None,
    ) -> None:
        self.chain_reader = chain_reader
        self.pipeline = pipeline
        self.decoder = decoder or EventDecoder()
        self.logger = setup_logger(self.__class__.__name__, log_file)
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    @property
    def watched_addresses(self) -> list[str]:
        with self._lock:
            return list(self._subscriptions)

    def start(self, watches: Iterable[WatchedContract]) -> int:
        """Subscribe to every watch; returns how many new subscriptions opened."""
        return sum(1 for watch in watches if self.watch(watch))

    def sync(self, watches: Iterable[WatchedContract]) -> int:
        """Open subscriptions for watches that have none (e.g. after a failed subscribe)."""
        return self.start(watches)

    def watch(self, watch: WatchedContract) -> bool:
        """Subscribe to one contract. Idempotent per address."""
        with self._lock:
            if watch.address in self._subscriptions:
                return False
            try:
                subscription = self.chain_reader.subscribe(
                    watch.address, topics_for(watch.kind), partial(self._on_log, watch)
                )
            except ChainReadError as exc:
                self.logger.error("Cannot subscribe to %s %s: %s", watch.kind.value, watch.address, exc)
                return False
            self._subscriptions[watch.address] = subscription
        self.logger.info("Listening to %s contract %s", watch.kind.value, watch.address)
        return True

    def stop(self) -> None:
        with self._lock:
            subscriptions = list(self._subscriptions.items())
            self._subscriptions.clear()
        for address, subscription in subscriptions:
            try:
                subscription.unsubscribe()
            except (ChainReadError, OSError) as exc:
                self.logger.warning("Unsubscribe from %s failed: %s", address, exc)
        self.logger.info("Live listener stopped (%d subscriptions closed)", len(subscriptions))

    def _on_log(self, watch: WatchedContract, raw: RawEvent) -> None:
        if raw.removed:
            self.logger.warning("Ignoring removed log %s:%d (reorg)", raw.tx_hash, raw.log_index)
            return
        try:
            event = self.decoder.decode(watch.kind, raw)
        except DecodeError as exc:
            self.logger.warning("Skipping undecodable live log: %s", exc)
            return
        self.pipeline.publish(event)
