"""Backfill Scanner: replay historical logs over a closed block range.

The range is split into chunks of LOG_CHUNK_SIZE blocks. For each chunk every
watched contract is queried, its logs are decoded and published to the
pipeline in (block_number, log_index) order, and the checkpoint is committed
to the chunk's last block once the chunk is fully applied.

Contracts registered while a chunk is being applied (a DAOCreated inside the
chunk) are scanned over the same chunk before moving on, so a DAO's first
proposals are not missed when they land in the block range of its creation.

A failed chain read aborts the scan before the checkpoint moves; the next run
resumes at the first unfinished chunk.

A contract can also be registered after its creation block is already behind
the checkpoint (a DAOCreated recovered from the dead letter). Its watch keeps
the block it is owed history from, and catch_up() scans it up to the
checkpoint.
"""

from dataclasses import dataclass
from pathlib import Path

from src.chain.decoder import EventDecoder
from src.chain.reader import BaseChainReader
from src.chain.schema import topics_for
from src.indexer.checkpoint import CheckpointStore
from src.indexer.pipeline import EventPipeline
from src.indexer.registry import ContractRegistry, WatchedContract
from src.shared.config import Config
from src.shared.exceptions import DecodeError
from src.shared.utils import setup_logger


@dataclass
class ScanResult:
    """Counters for one scan() call."""

    from_block: int
    to_block: int
    chunks: int = 0
    events: int = 0
    applied: int = 0
    decode_errors: int = 0
    last_committed: int | None = None


class BackfillScanner:
    """Chunked historical log scan over every watched contract."""

    def __init__(
        self,
        registry: ContractRegistry,
        chain_reader: BaseChainReader,
        pipeline: EventPipeline,
        decoder: EventDecoder | None = None,
        chunk_size: int | None = None,
        log_file: Path | None = None,
    ) -> None:
        self.registry = registry
        self.chain_reader = chain_reader
        self.pipeline = pipeline
        self.decoder = decoder or EventDecoder()
        self.chunk_size = chunk_size or Config.LOG_CHUNK_SIZE
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        self.logger = setup_logger(self.__class__.__name__, log_file)

    def scan(self, from_block: int, to_block: int, checkpoint: CheckpointStore | None = None) -> ScanResult:
        """Scan [from_block, to_block].

        Args:
            from_block: First block (inclusive).
            to_block: Last block (inclusive). An empty range is a no-op.
            checkpoint: Committed after each chunk when given.

        Raises:
            ChainReadError: Propagated from the chain reader; chunks already
                committed stay committed.
        """
        result = ScanResult(from_block=from_block, to_block=to_block)
        if from_block > to_block:
            return result

        self.logger.info("Backfilling blocks %d..%d", from_block, to_block)
        for chunk_start in range(from_block, to_block + 1, self.chunk_size):
            chunk_end = min(chunk_start + self.chunk_size - 1, to_block)
            scanned = self._scan_chunk(chunk_start, chunk_end, result)
            result.chunks += 1
            if checkpoint is not None:
                checkpoint.commit(chunk_end)
                result.last_committed = chunk_end
                # Contracts created inside this chunk got their history with it
                self.registry.clear_backfill(
                    w.address
                    for w in scanned
                    if w.backfill_from is not None and chunk_start <= w.backfill_from <= chunk_end
                )

        self.logger.info(
            "Backfill %d..%d done: %d events, %d applied, %d undecodable",
            from_block,
            to_block,
            result.events,
            result.applied,
            result.decode_errors,
        )
        return result

    def catch_up(self, checkpoint: CheckpointStore) -> ScanResult | None:
        """Scan contracts that are owed history behind the checkpoint.

        Each such watch is scanned from its creation block to the committed
        checkpoint, then marked caught up. Blocks after the checkpoint are left
        to the regular scan.

        Returns:
            Counters for the catch-up, or None if nothing was owed.

        Raises:
            ChainReadError: The watch stays owed and is retried next time.
        """
        committed = checkpoint.get()
        if committed is None:
            return None
        owed = [w for w in self.registry.list() if w.backfill_from is not None and w.backfill_from <= committed]
        if not owed:
            return None

        result = ScanResult(from_block=min(w.backfill_from for w in owed), to_block=committed)
        for watch in owed:
            self.logger.info(
                "Catching up %s %s over %d..%d", watch.kind.value, watch.address, watch.backfill_from, committed
            )
            for chunk_start in range(watch.backfill_from, committed + 1, self.chunk_size):
                chunk_end = min(chunk_start + self.chunk_size - 1, committed)
                self._scan_contract(watch, chunk_start, chunk_end, result)
                result.chunks += 1
            self.registry.clear_backfill([watch.address])
        return result

    def _scan_chunk(self, chunk_start: int, chunk_end: int, result: ScanResult) -> list[WatchedContract]:
        scanned: dict[str, WatchedContract] = {}
        while True:
            pending = [w for w in self.registry.list() if w.address not in scanned]
            if not pending:
                return list(scanned.values())
            for watch in pending:
                scanned[watch.address] = watch
                self._scan_contract(watch, chunk_start, chunk_end, result)

    def _scan_contract(self, watch: WatchedContract, chunk_start: int, chunk_end: int, result: ScanResult) -> None:
        raw_events = self.chain_reader.query_events(watch.address, topics_for(watch.kind), chunk_start, chunk_end)

        decoded = []
        for raw in sorted(raw_events, key=lambda e: e.position):
            if raw.removed:
                continue
            try:
                decoded.append(self.decoder.decode(watch.kind, raw))
            except DecodeError as exc:
                result.decode_errors += 1
                self.logger.warning("Skipping undecodable log: %s", exc)

        if decoded:
            result.events += len(decoded)
            result.applied += self.pipeline.publish_batch(decoded)
            self.logger.debug(
                "%s %s: %d events in %d..%d", watch.kind.value, watch.address, len(decoded), chunk_start, chunk_end
            )
