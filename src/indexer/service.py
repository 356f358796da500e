"""Indexer service: wires the components together and owns the start sequence.

Start sequence:
    1. Validate configuration and reach the chain (StartupError otherwise).
    2. Create missing tables and seed the factory watch.
    3. Seed the backfill start: checkpoint + 1, else START_BLOCK, else the
       current height.
    4. Start the pipeline worker and backfill [seed, current height],
       committing the checkpoint per chunk.
    5. Scan history still owed to contracts registered behind the checkpoint.
    6. Subscribe to every watched contract and start the poll loop.

Example:
    >>> service = IndexerService()
    >>> service.start()
    >>> ...
    >>> service.stop()
"""

from pathlib import Path

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from src.chain.reader import BaseChainReader, Web3ChainReader
from src.indexer.checkpoint import CheckpointStore
from src.indexer.dispatcher import EventDispatcher
from src.indexer.listener import LiveListener
from src.indexer.pipeline import EventPipeline
from src.indexer.poller import PollLoop
from src.indexer.projection import ProjectionEngine
from src.indexer.registry import ContractRegistry
from src.indexer.scanner import BackfillScanner, ScanResult
from src.shared.config import Config
from src.shared.db import init_db
from src.shared.db.session import SessionLocal
from src.shared.exceptions import ChainReadError, StartupError
from src.shared.utils import normalize_address, setup_logger


class IndexerService:
    def __init__(
        self,
        config: type[Config] | Config = Config,
        chain_reader: BaseChainReader | None = None,
        session_factory: sessionmaker | None = None,
        bind: Engine | None = None,
        log_file: Path | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            config: Settings source (the Config class or an instance/subclass).
            chain_reader: Reader to use; a Web3ChainReader on RPC_URL by default.
            session_factory: Session factory for the derived store.
            bind: Engine used to create tables; the session factory's bind by default.
            log_file: Optional path for file-based logging.
        """
        self.config = config
        self.logger = setup_logger(self.__class__.__name__, log_file)
        self._log_file = log_file
        self._chain_reader = chain_reader
        self._session_factory = session_factory or SessionLocal
        self._bind = bind if bind is not None else self._session_factory.kw.get("bind")
        self._started = False

        self.registry = ContractRegistry(self._session_factory, log_file=log_file)
        self.checkpoint = CheckpointStore(config.INDEXER_NAME, self._session_factory, log_file=log_file)

        # Built lazily, the chain reader needs a valid endpoint
        self.dispatcher: EventDispatcher | None = None
        self.pipeline: EventPipeline | None = None
        self.scanner: BackfillScanner | None = None
        self.listener: LiveListener | None = None
        self.poll_loop: PollLoop | None = None

    @property
    def chain_reader(self) -> BaseChainReader:
        if self._chain_reader is None:
            self._chain_reader = Web3ChainReader(
                self.config.RPC_URL,
                timeout=self.config.REQUEST_TIMEOUT,
                max_retries=self.config.MAX_RETRIES,
                retry_backoff=self.config.RETRY_BACKOFF,
                filter_poll_interval=self.config.FILTER_POLL_INTERVAL,
                log_file=self._log_file,
            )
        return self._chain_reader

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> ScanResult:
        """Backfill to the current height, then go live.

        Returns:
            Result of the start-up backfill.

        Raises:
            StartupError: Invalid configuration or unreachable chain.
        """
        if self._started:
            raise StartupError("Indexer already started")

        seed, height = self._prepare()
        self.pipeline.start()
        try:
            result = self.scanner.scan(seed, height, self.checkpoint)
            self.scanner.catch_up(self.checkpoint)
        except ChainReadError as exc:
            self.pipeline.stop()
            raise StartupError(f"Backfill failed: {exc}") from exc

        self.dispatcher.add_watch_hook(self.listener.watch)
        self.listener.start(self.registry.list())
        self.poll_loop.start()
        self._started = True
        self.logger.info("Indexer live from block %d", height)
        return result

    def stop(self) -> None:
        """Stop polling, close subscriptions, drain in-flight projections."""
        if self.poll_loop is not None:
            self.poll_loop.stop()
        if self.listener is not None:
            self.listener.stop()
        if self.pipeline is not None:
            self.pipeline.stop()
        self._started = False
        self.logger.info("Indexer stopped")

    def run_once(self) -> ScanResult:
        """Backfill to the current height and retry failed events, without going live."""
        seed, height = self._prepare()
        try:
            result = self.scanner.scan(seed, height, self.checkpoint)
            self.pipeline.retry_failed()
            self.scanner.catch_up(self.checkpoint)
        except ChainReadError as exc:
            raise StartupError(f"Backfill failed: {exc}") from exc
        return result

    def health_check(self) -> bool:
        try:
            return self.chain_reader.health_check()
        except ValueError:
            return False

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _prepare(self) -> tuple[int, int]:
        """Validate, build components, create tables and compute the backfill range."""
        try:
            self.config.validate()
            factory = normalize_address(self.config.FACTORY_ADDRESS)
            reader = self.chain_reader
        except ValueError as exc:
            raise StartupError(str(exc)) from exc

        try:
            height = reader.current_height()
        except ChainReadError as exc:
            raise StartupError(f"Chain endpoint unreachable: {exc}") from exc

        self._build(reader)
        init_db(self._bind)
        self.registry.seed_factory(factory)

        seed = self.checkpoint.seed_height(height, self.config.START_BLOCK)
        self.logger.info("Chain height %d, backfill starts at block %d", height, seed)
        return seed, height

    def _build(self, reader: BaseChainReader) -> None:
        if self.dispatcher is not None:
            return
        log_file = self._log_file
        projection = ProjectionEngine(self.registry, reader, self._session_factory, log_file=log_file)
        self.dispatcher = EventDispatcher(
            projection,
            self._session_factory,
            max_attempts=self.config.MAX_EVENT_ATTEMPTS,
            log_file=log_file,
        )
        self.pipeline = EventPipeline(self.dispatcher, log_file=log_file)
        self.scanner = BackfillScanner(
            self.registry, reader, self.pipeline, chunk_size=self.config.LOG_CHUNK_SIZE, log_file=log_file
        )
        self.listener = LiveListener(reader, self.pipeline, log_file=log_file)
        self.poll_loop = PollLoop(
            reader,
            self.scanner,
            self.checkpoint,
            pipeline=self.pipeline,
            listener=self.listener,
            registry=self.registry,
            interval=self.config.POLL_INTERVAL,
            log_file=log_file,
        )
