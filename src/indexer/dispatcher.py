"""Event Dispatcher: route decoded events to projection handlers.

Routing is a table keyed by (contract kind, event name). Unknown events are
logged and dropped. A handler failure is isolated: the event is written to the
failed_events table and the dispatcher moves on; poll ticks retry failed
events until they succeed or run out of attempts. Retries are run through
the pipeline (EventPipeline.retry_failed) so they share its worker thread.

Handlers may return newly registered watches (DAOCreated fan-out); those are
forwarded to every watch hook, which is how the live listener learns about new
contracts.
"""

from pathlib import Path
from typing import Any, Callable

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from src.chain.decoder import DecodedEvent
from src.chain.schema import ContractKind
from src.indexer.projection import Handler, ProjectionEngine
from src.indexer.registry import WatchedContract
from src.shared.config import Config
from src.shared.db.models import FailedEvent
from src.shared.db.session import SessionLocal, get_db
from src.shared.utils import setup_logger

STATUS_RETRY = "retry"
STATUS_FAILED = "failed"
STATUS_RESOLVED = "resolved"

WatchHook = Callable[[WatchedContract], Any]


class EventDispatcher:
    """Routes decoded events and dead-letters the ones that fail."""

    def __init__(
        self,
        projection: ProjectionEngine | None = None,
        session_factory: sessionmaker | None = None,
        max_attempts: int | None = None,
        log_file: Path | None = None,
    ) -> None:
        self._session_factory = session_factory or SessionLocal
        self.max_attempts = max_attempts or Config.MAX_EVENT_ATTEMPTS
        self.logger = setup_logger(self.__class__.__name__, log_file)
        self._handlers: dict[tuple[ContractKind, str], Handler] = {}
        self._watch_hooks: list[WatchHook] = []
        if projection is not None:
            for (kind, name), handler in projection.handlers().items():
                self.register(kind, name, handler)

    def register(self, kind: ContractKind, event_name: str, handler: Handler) -> None:
        self._handlers[(ContractKind(kind), event_name)] = handler

    def add_watch_hook(self, hook: WatchHook) -> None:
        """Call `hook` with every watch a handler registers."""
        self._watch_hooks.append(hook)

    def dispatch(
        self,
        contract_kind: ContractKind,
        event_name: str,
        fields: dict,
        block_number: int,
        tx_hash: str,
        log_index: int,
        address: str,
    ) -> bool:
        event = DecodedEvent(
            address=address,
            contract_kind=ContractKind(contract_kind),
            event_name=event_name,
            fields=fields,
            block_number=block_number,
            tx_hash=tx_hash,
            log_index=log_index,
        )
        return self.dispatch_event(event)

    def dispatch_event(self, event: DecodedEvent) -> bool:
        """Apply one event.

        Returns:
            True if the handler succeeded, False if the event was dropped or
            dead-lettered.
        """
        handler = self._handlers.get((event.contract_kind, event.event_name))
        if handler is None:
            self.logger.warning("No handler for %s; event dropped", event.describe())
            return False

        try:
            new_watches = handler(event) or []
        except Exception as exc:
            self.logger.error("Projection failed for %s: %s", event.describe(), exc, exc_info=True)
            self._record_failure(event, exc)
            return False

        for watch in new_watches:
            for hook in self._watch_hooks:
                try:
                    hook(watch)
                except Exception:
                    self.logger.exception("Watch hook failed for %s", watch.address)
        return True

    # ------------------------------------------------------------------
    # Dead letter
    # ------------------------------------------------------------------

    def retry_failed(self) -> int:
        """Re-dispatch failed events that still have attempts left.

        Returns:
            Number of events that succeeded on this pass.
        """
        with get_db(self._session_factory) as session:
            rows = session.execute(
                select(FailedEvent)
                .where(FailedEvent.status == STATUS_RETRY)
                .order_by(FailedEvent.block_number, FailedEvent.log_index)
            ).scalars().all()
            pending = [(row.id, self._event_from_row(row)) for row in rows]

        resolved = 0
        for row_id, event in pending:
            if not self.dispatch_event(event):
                continue
            with get_db(self._session_factory) as session:
                row = session.get(FailedEvent, row_id)
                row.status = STATUS_RESOLVED
                row.error = None
            resolved += 1
            self.logger.info("Recovered failed event %s", event.describe())
        return resolved

    def failed_events(self, status: str | None = None) -> list[dict]:
        query = select(FailedEvent).order_by(FailedEvent.block_number, FailedEvent.log_index)
        if status is not None:
            query = query.where(FailedEvent.status == status)
        with get_db(self._session_factory) as session:
            return [
                {
                    "event": f"{row.contract_kind}.{row.event_name}",
                    "address": row.address,
                    "blockNumber": row.block_number,
                    "txHash": row.tx_hash,
                    "logIndex": row.log_index,
                    "attempts": row.attempts,
                    "status": row.status,
                    "error": row.error,
                }
                for row in session.execute(query).scalars()
            ]

    def _record_failure(self, event: DecodedEvent, exc: Exception) -> None:
        try:
            with get_db(self._session_factory) as session:
                row = session.execute(
                    select(FailedEvent).where(
                        FailedEvent.tx_hash == event.tx_hash,
                        FailedEvent.log_index == event.log_index,
                    )
                ).scalar_one_or_none()
                if row is None:
                    row = FailedEvent(
                        address=event.address,
                        contract_kind=event.contract_kind.value,
                        event_name=event.event_name,
                        fields=_jsonable(event.fields),
                        block_number=event.block_number,
                        tx_hash=event.tx_hash,
                        log_index=event.log_index,
                        attempts=1,
                        status=STATUS_RETRY,
                    )
                    session.add(row)
                elif row.status == STATUS_RESOLVED:
                    # Failing again after a recovery starts a new round of attempts
                    row.attempts = 1
                else:
                    row.attempts += 1
                row.error = str(exc)
                if row.attempts >= self.max_attempts:
                    row.status = STATUS_FAILED
                    self.logger.error(
                        "Giving up on %s after %d attempts", event.describe(), row.attempts
                    )
                else:
                    row.status = STATUS_RETRY
        except SQLAlchemyError:
            self.logger.exception("Could not record failed event %s", event.describe())

    @staticmethod
    def _event_from_row(row: FailedEvent) -> DecodedEvent:
        return DecodedEvent(
            address=row.address,
            contract_kind=ContractKind(row.contract_kind),
            event_name=row.event_name,
            fields=dict(row.fields),
            block_number=row.block_number,
            tx_hash=row.tx_hash,
            log_index=row.log_index,
        )


def _jsonable(fields: dict) -> dict:
    """Bytes values are stored hex-encoded; everything else is JSON-native."""
    return {key: ("0x" + value.hex() if isinstance(value, bytes) else value) for key, value in fields.items()}
