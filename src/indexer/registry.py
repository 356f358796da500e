"""Contract Registry: which addresses are watched, and for which event kind.

Append-only and keyed by address. It grows at runtime when a DAO is created
(the new DAO's Core, Governance and Treasury contracts are added under the
DAO's id) and is consulted by value by the scanner and the live listener.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable

from sqlalchemy import select, update
from sqlalchemy.orm import Session, sessionmaker

from src.chain.schema import ContractKind
from src.shared.db.models import ContractWatch
from src.shared.db.session import SessionLocal, get_db
from src.shared.utils import normalize_address, setup_logger


@dataclass(frozen=True)
class WatchedContract:
    """Snapshot of one registry entry."""

    address: str
    kind: ContractKind
    parent_dao_id: int | None = None
    backfill_from: int | None = field(default=None, compare=False)

    @classmethod
    def from_row(cls, row: ContractWatch) -> "WatchedContract":
        return cls(
            address=row.address,
            kind=ContractKind(row.kind),
            parent_dao_id=row.parent_dao_id,
            backfill_from=row.backfill_from,
        )


class ContractRegistry:
    """Database-backed registry of watched contracts."""

    def __init__(self, session_factory: sessionmaker | None = None, log_file: Path | None = None) -> None:
        self._session_factory = session_factory or SessionLocal
        self.logger = setup_logger(self.__class__.__name__, log_file)

    def watch(
        self,
        address: str,
        kind: ContractKind,
        parent_dao_id: int | None = None,
        session: Session | None = None,
        from_block: int | None = None,
    ) -> tuple[WatchedContract, bool]:
        """Add a watch if the address is not watched yet.

        Args:
            address: Contract address (any case; stored checksummed).
            kind: Contract kind, which selects the event schemas to watch.
            parent_dao_id: Owning DAO for Core/Governance/Treasury contracts.
            session: Join the caller's transaction instead of opening one.
            from_block: Block the contract appeared in. Its history from there
                is owed a scan until clear_backfill() is called.

        Returns:
            (entry, created). An existing watch is returned unchanged, even if
            kind or parent differ.
        """
        address = normalize_address(address)
        kind = ContractKind(kind)
        if session is not None:
            return self._watch(session, address, kind, parent_dao_id, from_block)
        with get_db(self._session_factory) as own_session:
            return self._watch(own_session, address, kind, parent_dao_id, from_block)

    def _watch(
        self,
        session: Session,
        address: str,
        kind: ContractKind,
        parent_dao_id: int | None,
        from_block: int | None,
    ):
        row = session.execute(select(ContractWatch).where(ContractWatch.address == address)).scalar_one_or_none()
        if row is not None:
            existing = WatchedContract.from_row(row)
            if existing.kind is not kind:
                self.logger.warning(
                    "Address %s already watched as %s; ignoring %s", address, existing.kind.value, kind.value
                )
            return existing, False

        row = ContractWatch(address=address, kind=kind.value, parent_dao_id=parent_dao_id, backfill_from=from_block)
        session.add(row)
        session.flush()
        self.logger.info("Watching %s contract %s (dao_id=%s)", kind.value, address, parent_dao_id)
        return WatchedContract.from_row(row), True

    def seed_factory(self, address: str) -> WatchedContract:
        """Register the factory, the only watch supplied at start-up."""
        entry, _ = self.watch(address, ContractKind.FACTORY)
        return entry

    def clear_backfill(self, addresses: Iterable[str]) -> None:
        """Record that the history owed to these watches has been scanned."""
        addresses = [normalize_address(address) for address in addresses]
        if not addresses:
            return
        with get_db(self._session_factory) as session:
            session.execute(
                update(ContractWatch).where(ContractWatch.address.in_(addresses)).values(backfill_from=None)
            )

    def list(self, kind: ContractKind | None = None) -> list[WatchedContract]:
        """All watches in registration order, optionally filtered by kind."""
        query = select(ContractWatch).order_by(ContractWatch.id)
        if kind is not None:
            query = query.where(ContractWatch.kind == ContractKind(kind).value)
        with get_db(self._session_factory) as session:
            return [WatchedContract.from_row(row) for row in session.execute(query).scalars()]

    def get(self, address: str, session: Session | None = None) -> WatchedContract | None:
        address = normalize_address(address)
        query = select(ContractWatch).where(ContractWatch.address == address)
        if session is not None:
            row = session.execute(query).scalar_one_or_none()
            return WatchedContract.from_row(row) if row is not None else None
        with get_db(self._session_factory) as own_session:
            row = own_session.execute(query).scalar_one_or_none()
            return WatchedContract.from_row(row) if row is not None else None
