"""
Derived-store write primitives for the DAO indexer.

Every helper takes an open SQLAlchemy session and never commits; the caller
owns the transaction (one transaction per projected event). The primitives are
the ones the projection needs:

- create-if-absent by natural key (DAO, Member, Proposal, Vote, Activity)
- find by natural key
- atomic in-database increment of a tally column
- CSV export of a whitelisted table for operators

Example:

    from src.shared.db import get_db
    from src.shared.db.storage import find_dao_by_address

    with get_db() as session:
        dao = find_dao_by_address(session, "0x5FbDB2315678afecb367f032d93F642f64180aa3")
"""

from datetime import datetime
from pathlib import Path
from typing import Any

import pandas as pd
from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .models import DAO, Activity, Member, Proposal, Vote

ALLOWED_TABLES = frozenset(
    {
        "daos",
        "members",
        "proposals",
        "votes",
        "activities",
        "contract_watches",
        "indexer_checkpoints",
        "failed_events",
    }
)

# support value -> Proposal tally column
TALLY_COLUMNS = {
    0: "against_votes",
    1: "for_votes",
    2: "abstain_votes",
}


def _get_or_create(session: Session, model, lookup: dict[str, Any], values: dict[str, Any]):
    """Return (row, created). Existing rows are returned untouched."""
    row = session.execute(select(model).filter_by(**lookup)).scalar_one_or_none()
    if row is not None:
        return row, False
    row = model(**lookup, **values)
    session.add(row)
    session.flush()
    return row, True


# ---------------------------------------------------------------------------
# DAO
# ---------------------------------------------------------------------------


def find_dao_by_address(session: Session, address: str) -> DAO | None:
    return session.execute(select(DAO).where(DAO.address == address)).scalar_one_or_none()


def get_dao(session: Session, dao_id: int) -> DAO | None:
    return session.get(DAO, dao_id)


def create_dao_if_absent(session: Session, address: str, **values) -> tuple[DAO, bool]:
    """
    Insert a DAO keyed by address. The update clause is empty: the first
    writer wins and later deliveries of the same creation event are no-ops.
    """
    return _get_or_create(session, DAO, {"address": address}, values)


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------


def find_member(session: Session, dao_id: int, address: str) -> Member | None:
    return session.execute(
        select(Member).where(Member.dao_id == dao_id, Member.address == address)
    ).scalar_one_or_none()


def get_or_create_member(session: Session, dao_id: int, address: str, **values) -> tuple[Member, bool]:
    return _get_or_create(session, Member, {"dao_id": dao_id, "address": address}, values)


# ---------------------------------------------------------------------------
# Proposal
# ---------------------------------------------------------------------------


def find_proposal(session: Session, dao_id: int, proposal_id: int) -> Proposal | None:
    return session.execute(
        select(Proposal).where(Proposal.dao_id == dao_id, Proposal.proposal_id == proposal_id)
    ).scalar_one_or_none()


def get_or_create_proposal(
    session: Session, dao_id: int, proposal_id: int, **values
) -> tuple[Proposal, bool]:
    return _get_or_create(session, Proposal, {"dao_id": dao_id, "proposal_id": proposal_id}, values)


def increment_tally(session: Session, proposal_pk: int, support: int, votes: int) -> None:
    """
    Add ``votes`` to the tally column selected by ``support``.

    Runs as a single UPDATE ... SET col = col + :votes so two concurrent
    writers can never lose each other's increment.

    Raises:
        ValueError: If support is not 0 (Against), 1 (For) or 2 (Abstain).
    """
    column_name = TALLY_COLUMNS.get(support)
    if column_name is None:
        raise ValueError(f"Unknown vote support value: {support}")
    column = getattr(Proposal, column_name)
    session.execute(
        update(Proposal)
        .where(Proposal.id == proposal_pk)
        .values({column_name: column + votes})
        .execution_options(synchronize_session=False)
    )


# ---------------------------------------------------------------------------
# Vote / Activity
# ---------------------------------------------------------------------------


def find_vote(session: Session, member_id: int, proposal_pk: int, tx_hash: str, log_index: int) -> Vote | None:
    return session.execute(
        select(Vote).where(
            Vote.member_id == member_id,
            Vote.proposal_id == proposal_pk,
            Vote.tx_hash == tx_hash,
            Vote.log_index == log_index,
        )
    ).scalar_one_or_none()


def insert_vote(session: Session, **values) -> Vote:
    vote = Vote(**values)
    session.add(vote)
    session.flush()
    return vote


def append_activity(
    session: Session,
    dao_id: int,
    type: str,
    actor: str | None,
    metadata: dict,
    tx_hash: str,
    log_index: int,
    block_number: int | None = None,
    timestamp: datetime | None = None,
) -> tuple[Activity, bool]:
    """Append one activity row per (tx_hash, log_index); replays are no-ops.

    ``timestamp`` is the chain time when the event carries one, otherwise the
    row is stamped when it is indexed.
    """
    values = {
        "dao_id": dao_id,
        "type": type,
        "actor": actor,
        "event_metadata": metadata,
        "block_number": block_number,
    }
    if timestamp is not None:
        values["timestamp"] = timestamp
    return _get_or_create(session, Activity, {"tx_hash": tx_hash, "log_index": log_index}, values)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def export_to_csv(table_name: str, output_path: str | Path, bind: Engine | None = None) -> int:
    """
    Export a whitelisted table to a CSV file.

    Example:
        export_to_csv("proposals", "proposals.csv")

    Returns:
        Number of rows written.

    Raises:
        ValueError: If table_name is not in ALLOWED_TABLES.
    """
    if table_name not in ALLOWED_TABLES:
        raise ValueError(f"Invalid table name: {table_name}")

    if bind is None:
        from .engine import engine as bind

    df = pd.read_sql_table(table_name, bind)
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    df.to_csv(output_path, index=False, encoding="utf-8")
    return len(df)
