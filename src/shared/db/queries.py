"""Read-side queries over the derived store.

These are the lookups the API layer serves: entities by address or id with
offset/limit pagination, and the activity feed newest first. Every function
returns plain dicts so callers never hold ORM rows past the session.
"""

from decimal import Decimal
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from .models import DAO, Activity, Checkpoint, Member, Proposal, Vote

MAX_ACTIVITY_LIMIT = 100


def _amount(value: Decimal | int | None) -> int:
    return int(value or 0)


def _dao_dict(dao: DAO) -> dict[str, Any]:
    return {
        "id": dao.id,
        "address": dao.address,
        "name": dao.name,
        "creator": dao.creator,
        "created_at": dao.created_at,
        "is_active": dao.is_active,
    }


def _proposal_dict(proposal: Proposal) -> dict[str, Any]:
    return {
        "id": proposal.id,
        "dao_id": proposal.dao_id,
        "proposal_id": proposal.proposal_id,
        "title": proposal.title,
        "description": proposal.description,
        "proposer": proposal.proposer,
        "state": proposal.state,
        "start_block": proposal.start_block,
        "end_block": proposal.end_block,
        "for_votes": _amount(proposal.for_votes),
        "against_votes": _amount(proposal.against_votes),
        "abstain_votes": _amount(proposal.abstain_votes),
        "created_at": proposal.created_at,
    }


def _member_dict(member: Member) -> dict[str, Any]:
    return {
        "id": member.id,
        "address": member.address,
        "voting_power": _amount(member.voting_power),
        "share_percentage": member.share_percentage,
        "is_active": member.is_active,
        "joined_at": member.joined_at,
    }


def _count(session: Session, model, *criteria) -> int:
    return session.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


# ---------------------------------------------------------------------------
# DAOs
# ---------------------------------------------------------------------------


def list_daos(session: Session, page: int = 0, limit: int = 10) -> dict[str, Any]:
    """Page through DAOs, newest first, with member/proposal counts."""
    rows = (
        session.execute(
            select(DAO).order_by(DAO.created_at.desc(), DAO.id.desc()).offset(page * limit).limit(limit)
        )
        .scalars()
        .all()
    )
    daos = []
    for dao in rows:
        item = _dao_dict(dao)
        item["member_count"] = _count(session, Member, Member.dao_id == dao.id)
        item["proposal_count"] = _count(session, Proposal, Proposal.dao_id == dao.id)
        daos.append(item)
    return {"daos": daos, "total": _count(session, DAO), "page": page, "limit": limit}


def get_dao_by_address(session: Session, address: str) -> dict[str, Any] | None:
    dao = session.execute(select(DAO).where(DAO.address == address)).scalar_one_or_none()
    if dao is None:
        return None
    item = _dao_dict(dao)
    item["members"] = list_members(session, address)
    item["proposals"] = list_proposals(session, address, page=0, limit=MAX_ACTIVITY_LIMIT)["proposals"]
    item["activity"] = list_activity(session, dao_address=address, limit=20)
    return item


def get_daos_by_creator(session: Session, creator: str) -> list[dict[str, Any]]:
    rows = session.execute(
        select(DAO).where(DAO.creator == creator).order_by(DAO.created_at.desc())
    ).scalars()
    return [_dao_dict(dao) for dao in rows]


def _dao_id(session: Session, address: str) -> int | None:
    return session.execute(select(DAO.id).where(DAO.address == address)).scalar_one_or_none()


# ---------------------------------------------------------------------------
# Proposals
# ---------------------------------------------------------------------------


def list_proposals(session: Session, dao_address: str, page: int = 0, limit: int = 10) -> dict[str, Any]:
    dao_id = _dao_id(session, dao_address)
    if dao_id is None:
        return {"proposals": [], "total": 0}

    rows = (
        session.execute(
            select(Proposal)
            .where(Proposal.dao_id == dao_id)
            .order_by(Proposal.proposal_id.desc())
            .offset(page * limit)
            .limit(limit)
        )
        .scalars()
        .all()
    )
    proposals = []
    for proposal in rows:
        item = _proposal_dict(proposal)
        item["vote_count"] = _count(session, Vote, Vote.proposal_id == proposal.id)
        proposals.append(item)
    return {"proposals": proposals, "total": _count(session, Proposal, Proposal.dao_id == dao_id)}


def get_proposal(session: Session, dao_address: str, proposal_id: int) -> dict[str, Any] | None:
    dao_id = _dao_id(session, dao_address)
    if dao_id is None:
        return None
    proposal = session.execute(
        select(Proposal).where(Proposal.dao_id == dao_id, Proposal.proposal_id == proposal_id)
    ).scalar_one_or_none()
    if proposal is None:
        return None

    item = _proposal_dict(proposal)
    votes = session.execute(
        select(Vote, Member.address)
        .join(Member, Member.id == Vote.member_id)
        .where(Vote.proposal_id == proposal.id)
        .order_by(Vote.block_number, Vote.log_index)
    ).all()
    item["votes"] = [
        {
            "voter": voter,
            "support": vote.support,
            "voting_power": _amount(vote.voting_power),
            "tx_hash": vote.tx_hash,
        }
        for vote, voter in votes
    ]
    return item


# ---------------------------------------------------------------------------
# Members
# ---------------------------------------------------------------------------


def list_members(session: Session, dao_address: str) -> list[dict[str, Any]]:
    dao_id = _dao_id(session, dao_address)
    if dao_id is None:
        return []
    rows = session.execute(
        select(Member).where(Member.dao_id == dao_id).order_by(Member.voting_power.desc(), Member.id)
    ).scalars()
    return [_member_dict(member) for member in rows]


def get_member(session: Session, dao_address: str, member_address: str, vote_limit: int = 50):
    dao_id = _dao_id(session, dao_address)
    if dao_id is None:
        return None
    member = session.execute(
        select(Member).where(Member.dao_id == dao_id, Member.address == member_address)
    ).scalar_one_or_none()
    if member is None:
        return None

    item = _member_dict(member)
    votes = session.execute(
        select(Vote, Proposal)
        .join(Proposal, Proposal.id == Vote.proposal_id)
        .where(Vote.member_id == member.id)
        .order_by(Vote.block_number.desc().nulls_last(), Vote.log_index.desc(), Vote.id.desc())
        .limit(vote_limit)
    ).all()
    item["votes"] = [
        {
            "proposal_id": proposal.proposal_id,
            "title": proposal.title,
            "state": proposal.state,
            "support": vote.support,
            "voting_power": _amount(vote.voting_power),
        }
        for vote, proposal in votes
    ]
    return item


# ---------------------------------------------------------------------------
# Activity feed
# ---------------------------------------------------------------------------


def list_activity(
    session: Session,
    dao_address: str | None = None,
    actor: str | None = None,
    type: str | None = None,
    offset: int = 0,
    limit: int = 20,
) -> list[dict[str, Any]]:
    """Activity rows newest first by chain position; ``limit`` is capped at MAX_ACTIVITY_LIMIT."""
    limit = max(0, min(limit, MAX_ACTIVITY_LIMIT))
    query = select(Activity, DAO).join(DAO, DAO.id == Activity.dao_id)

    if dao_address is not None:
        dao_id = _dao_id(session, dao_address)
        if dao_id is None:
            return []
        query = query.where(Activity.dao_id == dao_id)
    if actor is not None:
        query = query.where(Activity.actor == actor)
    if type is not None:
        query = query.where(Activity.type == type)

    rows = session.execute(
        query.order_by(
            Activity.block_number.desc().nulls_last(), Activity.log_index.desc(), Activity.id.desc()
        ).offset(offset).limit(limit)
    ).all()
    return [
        {
            "id": activity.id,
            "type": activity.type,
            "actor": activity.actor,
            "metadata": activity.event_metadata,
            "timestamp": activity.timestamp,
            "dao": {"id": dao.id, "address": dao.address, "name": dao.name},
        }
        for activity, dao in rows
    ]


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def global_stats(session: Session) -> dict[str, int]:
    return {
        "dao_count": _count(session, DAO),
        "total_members": _count(session, Member),
        "total_proposals": _count(session, Proposal),
        "total_votes": _count(session, Vote),
    }


def dao_stats(session: Session, dao_address: str) -> dict[str, int] | None:
    dao_id = _dao_id(session, dao_address)
    if dao_id is None:
        return None
    return {
        "members": _count(session, Member, Member.dao_id == dao_id),
        "proposals": _count(session, Proposal, Proposal.dao_id == dao_id),
        "activity": _count(session, Activity, Activity.dao_id == dao_id),
        "active_proposals": _count(
            session, Proposal, Proposal.dao_id == dao_id, Proposal.state == "Active"
        ),
    }


def get_checkpoint(session: Session, name: str = "default") -> int | None:
    row = session.get(Checkpoint, name)
    return row.block_number if row is not None else None
