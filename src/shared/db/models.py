from sqlalchemy import (
    JSON,
    TIMESTAMP,
    BigInteger,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)

from src.shared.utils import utcnow

from .base import Base

# uint256 fits in 78 decimal digits
UINT256 = Numeric(78, 0)


class Checkpoint(Base):
    __tablename__ = "indexer_checkpoints"

    name = Column(String(64), primary_key=True)
    block_number = Column(BigInteger, nullable=False)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)


class ContractWatch(Base):
    __tablename__ = "contract_watches"

    id = Column(Integer, primary_key=True)
    address = Column(String(42), nullable=False, unique=True)
    kind = Column(String(20), nullable=False)
    parent_dao_id = Column(Integer, ForeignKey("daos.id"), nullable=True)
    # first block of this contract's history not yet scanned; NULL once caught up
    backfill_from = Column(BigInteger)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)

    __table_args__ = (Index("idx_contract_watches_kind", "kind"),)


class DAO(Base):
    __tablename__ = "daos"

    id = Column(Integer, primary_key=True)
    address = Column(String(42), nullable=False, unique=True)
    name = Column(String(255), nullable=False)
    creator = Column(String(42), nullable=False)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    deactivated_at = Column(TIMESTAMP(timezone=True))
    tx_hash = Column(String(66))
    block_number = Column(BigInteger)

    __table_args__ = (
        Index("idx_daos_creator", "creator"),
        Index("idx_daos_created_at", "created_at"),
    )


class Member(Base):
    __tablename__ = "members"

    id = Column(Integer, primary_key=True)
    dao_id = Column(Integer, ForeignKey("daos.id"), nullable=False)
    address = Column(String(42), nullable=False)
    voting_power = Column(UINT256, nullable=False, default=0)
    share_percentage = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    joined_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    # position of the last MemberAdded/MemberRemoved applied
    last_event_block = Column(BigInteger)
    last_event_log_index = Column(Integer)

    __table_args__ = (
        UniqueConstraint("dao_id", "address"),
        Index("idx_members_address", "address"),
    )


class Proposal(Base):
    __tablename__ = "proposals"

    id = Column(Integer, primary_key=True)
    dao_id = Column(Integer, ForeignKey("daos.id"), nullable=False)
    proposal_id = Column(BigInteger, nullable=False)
    title = Column(String(512), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    proposer = Column(String(42))
    state = Column(String(20), nullable=False, default="Pending")
    start_block = Column(BigInteger)
    end_block = Column(BigInteger)
    for_votes = Column(UINT256, nullable=False, default=0)
    against_votes = Column(UINT256, nullable=False, default=0)
    abstain_votes = Column(UINT256, nullable=False, default=0)
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("dao_id", "proposal_id"),
        Index("idx_proposals_state", "state"),
    )


class Vote(Base):
    __tablename__ = "votes"

    id = Column(Integer, primary_key=True)
    member_id = Column(Integer, ForeignKey("members.id"), nullable=False)
    proposal_id = Column(Integer, ForeignKey("proposals.id"), nullable=False)
    support = Column(SmallInteger, nullable=False)
    voting_power = Column(UINT256, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    block_number = Column(BigInteger)
    timestamp = Column(TIMESTAMP(timezone=True), default=utcnow)

    __table_args__ = (
        UniqueConstraint("member_id", "proposal_id", "tx_hash", "log_index"),
        Index("idx_votes_proposal", "proposal_id"),
    )


class Activity(Base):
    __tablename__ = "activities"

    id = Column(Integer, primary_key=True)
    dao_id = Column(Integer, ForeignKey("daos.id"), nullable=False)
    type = Column(String(50), nullable=False)
    actor = Column(String(42))
    # "metadata" is reserved on declarative classes
    event_metadata = Column("metadata", JSON)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    block_number = Column(BigInteger)
    timestamp = Column(TIMESTAMP(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index"),
        Index("idx_activities_dao_position", "dao_id", "block_number", "log_index"),
        Index("idx_activities_actor", "actor"),
    )


class FailedEvent(Base):
    __tablename__ = "failed_events"

    id = Column(Integer, primary_key=True)
    address = Column(String(42), nullable=False)
    contract_kind = Column(String(20), nullable=False)
    event_name = Column(String(64), nullable=False)
    fields = Column(JSON, nullable=False)
    block_number = Column(BigInteger, nullable=False)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    error = Column(Text)
    attempts = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default="retry")
    created_at = Column(TIMESTAMP(timezone=True), default=utcnow)
    updated_at = Column(TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index"),
        Index("idx_failed_events_status", "status"),
    )
