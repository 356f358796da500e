"""Exception hierarchy for the indexer.

Transient chain failures are retried where they happen; decode and projection
failures are isolated per event; checkpoint regressions and startup failures
propagate to the operator.
"""


class IndexerError(Exception):
    """Base class for all indexer errors."""


class ChainReadError(IndexerError):
    """A chain read or subscription failed after all retries."""


class DecodeError(IndexerError):
    """A raw log does not match the registered event schema."""


class ProjectionError(IndexerError):
    """A decoded event could not be applied to the derived store."""


class CheckpointRegressionError(IndexerError):
    """An attempt was made to move the checkpoint backwards."""

    def __init__(self, current: int, attempted: int) -> None:
        super().__init__(f"Checkpoint regression: current={current}, attempted={attempted}")
        self.current = current
        self.attempted = attempted


class StartupError(IndexerError):
    """The indexing subsystem cannot start (bad endpoint, factory, or config)."""
