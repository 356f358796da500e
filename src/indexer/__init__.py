"""Event indexing: registry, checkpoint, scanners, dispatch and projection."""

from src.indexer.checkpoint import CheckpointStore
from src.indexer.dispatcher import EventDispatcher
from src.indexer.listener import LiveListener
from src.indexer.pipeline import EventPipeline
from src.indexer.poller import PollLoop
from src.indexer.projection import ProjectionEngine
from src.indexer.registry import ContractRegistry, WatchedContract
from src.indexer.scanner import BackfillScanner, ScanResult
from src.indexer.service import IndexerService

__all__ = [
    "CheckpointStore",
    "ContractRegistry",
    "WatchedContract",
    "BackfillScanner",
    "ScanResult",
    "LiveListener",
    "PollLoop",
    "EventDispatcher",
    "EventPipeline",
    "ProjectionEngine",
    "IndexerService",
]
