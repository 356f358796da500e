"""Checkpoint Store: the last fully projected block height."""

import threading
from pathlib import Path

from sqlalchemy.orm import sessionmaker

from src.shared.config import Config
from src.shared.db.models import Checkpoint
from src.shared.db.session import SessionLocal, get_db
from src.shared.exceptions import CheckpointRegressionError
from src.shared.utils import setup_logger


class CheckpointStore:
    """Persists the highest block height whose events are fully projected.

    The value only moves forward. Committing a lower height than the stored
    one is a logic bug and raises CheckpointRegressionError; committing the
    same height is a no-op.
    """

    def __init__(
        self,
        name: str | None = None,
        session_factory: sessionmaker | None = None,
        log_file: Path | None = None,
    ) -> None:
        self.name = name or Config.INDEXER_NAME
        self._session_factory = session_factory or SessionLocal
        self._lock = threading.Lock()
        self.logger = setup_logger(self.__class__.__name__, log_file)

    def get(self) -> int | None:
        """Return the committed height, or None if nothing was ever committed."""
        with get_db(self._session_factory) as session:
            row = session.get(Checkpoint, self.name)
            return row.block_number if row is not None else None

    def commit(self, height: int) -> None:
        """Persist `height` as the new checkpoint.

        Raises:
            CheckpointRegressionError: If height is below the stored value.
        """
        height = int(height)
        with self._lock, get_db(self._session_factory) as session:
            row = session.get(Checkpoint, self.name, with_for_update=True)
            if row is None:
                session.add(Checkpoint(name=self.name, block_number=height))
                self.logger.info("Checkpoint %s initialised at block %d", self.name, height)
                return
            if height < row.block_number:
                raise CheckpointRegressionError(row.block_number, height)
            if height == row.block_number:
                return
            row.block_number = height
            self.logger.debug("Checkpoint %s advanced to block %d", self.name, height)

    def seed_height(self, current_height: int, start_block: int | None = None) -> int:
        """First block the start-up backfill should scan.

        Resumes after the checkpoint when one exists; otherwise starts at the
        explicit start block, or at the current height (history skipped).
        """
        committed = self.get()
        if committed is not None:
            return committed + 1
        if start_block is not None:
            return start_block
        return current_height
