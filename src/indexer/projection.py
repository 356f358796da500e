"""Projection Engine: apply one decoded event to the derived store.

Every handler runs in a single database transaction and is idempotent:
re-applying the identical event (same tx_hash + log_index) leaves the store
exactly as the first application did.

Handlers by event:
    - DAOCreated: create the DAO if absent, register its Core / Governance /
      Treasury contracts (fan-out), append activity.
    - DAODeactivated: mark the DAO inactive, append activity.
    - ProposalCreated: create the proposal (Pending, zero tallies) or fill in
      a placeholder created by an earlier out-of-order vote.
    - VoteCast: dedupe on the vote key, then insert the vote and increment the
      tally in SQL; member voting power is overwritten, not accumulated.
    - ProposalExecuted / ProposalCanceled: record the state verbatim.
    - MemberAdded / MemberRemoved: upsert the member and set is_active, only
      if the event is newer than the last membership change applied.
    - Deposit / Withdrawal: append activity only.

Out-of-order events are handled with placeholders: a vote or state change for
a proposal not seen yet creates a Pending proposal with an empty title, which
ProposalCreated completes without touching tallies or state.
"""

from datetime import datetime
from pathlib import Path
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from src.chain.decoder import DecodedEvent
from src.chain.reader import BaseChainReader
from src.chain.schema import DAO_INFO_ABI, ContractKind
from src.indexer.registry import ContractRegistry, WatchedContract
from src.shared.db.session import SessionLocal, get_db
from src.shared.db.storage import (
    TALLY_COLUMNS,
    append_activity,
    create_dao_if_absent,
    find_dao_by_address,
    find_vote,
    get_or_create_member,
    get_or_create_proposal,
    increment_tally,
    insert_vote,
)
from src.shared.exceptions import ChainReadError, ProjectionError
from src.shared.utils import from_unix, setup_logger, utcnow

# Voting power granted by MemberAdded (the event carries none)
MEMBER_ADDED_VOTING_POWER = 100

PROPOSAL_PENDING = "Pending"
PROPOSAL_EXECUTED = "Executed"
PROPOSAL_CANCELED = "Canceled"

Handler = Callable[[DecodedEvent], list[WatchedContract]]


class ProjectionEngine:
    """Applies decoded events to the DAO / Member / Proposal / Vote / Activity tables."""

    def __init__(
        self,
        registry: ContractRegistry,
        chain_reader: BaseChainReader,
        session_factory: sessionmaker | None = None,
        log_file: Path | None = None,
    ) -> None:
        self.registry = registry
        self.chain_reader = chain_reader
        self._session_factory = session_factory or SessionLocal
        self.logger = setup_logger(self.__class__.__name__, log_file)

    def handlers(self) -> dict[tuple[ContractKind, str], Handler]:
        """Handler table keyed by (contract kind, event name)."""
        return {
            (ContractKind.FACTORY, "DAOCreated"): self.on_dao_created,
            (ContractKind.FACTORY, "DAODeactivated"): self.on_dao_deactivated,
            (ContractKind.GOVERNANCE, "ProposalCreated"): self.on_proposal_created,
            (ContractKind.GOVERNANCE, "VoteCast"): self.on_vote_cast,
            (ContractKind.GOVERNANCE, "ProposalExecuted"): self.on_proposal_executed,
            (ContractKind.GOVERNANCE, "ProposalCanceled"): self.on_proposal_canceled,
            (ContractKind.CORE, "MemberAdded"): self.on_member_added,
            (ContractKind.CORE, "MemberRemoved"): self.on_member_removed,
            (ContractKind.TREASURY, "Deposit"): self.on_deposit,
            (ContractKind.TREASURY, "Withdrawal"): self.on_withdrawal,
        }

    # ------------------------------------------------------------------
    # Factory
    # ------------------------------------------------------------------

    def on_dao_created(self, event: DecodedEvent) -> list[WatchedContract]:
        """Create the DAO and fan out watches for its sub-contracts.

        Returns:
            Watches created by this application (empty on replay).
        """
        fields = event.fields
        dao_address = fields["daoAddress"]

        with get_db(self._session_factory) as session:
            if find_dao_by_address(session, dao_address) is not None:
                self.logger.debug("DAO %s already indexed; replay ignored", dao_address)
                return []

        # Network call stays outside the transaction
        try:
            info = self.chain_reader.call(event.address, DAO_INFO_ABI, [dao_address])
        except ChainReadError as exc:
            raise ProjectionError(f"Cannot fetch daoInfo for {dao_address}: {exc}") from exc
        if not isinstance(info, dict) or not info.get("governance") or not info.get("treasury"):
            raise ProjectionError(f"daoInfo for {dao_address} returned no module addresses: {info!r}")

        new_watches = []
        with get_db(self._session_factory) as session:
            dao, created = create_dao_if_absent(
                session,
                dao_address,
                name=fields["name"],
                creator=fields["creator"],
                created_at=from_unix(fields["timestamp"]),
                is_active=True,
                tx_hash=event.tx_hash,
                block_number=event.block_number,
            )
            self._activity(
                session,
                dao.id,
                event,
                "DAOCreated",
                fields["creator"],
                occurred_at=dao.created_at,
                governance=info["governance"],
                treasury=info["treasury"],
                membership=info.get("membership"),
            )
            for address, kind in (
                (dao_address, ContractKind.CORE),
                (info["governance"], ContractKind.GOVERNANCE),
                (info["treasury"], ContractKind.TREASURY),
            ):
                entry, watch_created = self.registry.watch(
                    address, kind, dao.id, session=session, from_block=event.block_number
                )
                if watch_created:
                    new_watches.append(entry)

        self.logger.info("Indexed DAO %s (%s), %d new watches", fields["name"], dao_address, len(new_watches))
        return new_watches

    def on_dao_deactivated(self, event: DecodedEvent) -> list[WatchedContract]:
        dao_address = event.fields["daoAddress"]
        with get_db(self._session_factory) as session:
            dao = find_dao_by_address(session, dao_address)
            if dao is None:
                raise ProjectionError(f"DAODeactivated for unknown DAO {dao_address}")
            if dao.is_active:
                dao.is_active = False
                dao.deactivated_at = utcnow()
            self._activity(session, dao.id, event, "DAODeactivated", None)
        return []

    # ------------------------------------------------------------------
    # Governance
    # ------------------------------------------------------------------

    def on_proposal_created(self, event: DecodedEvent) -> list[WatchedContract]:
        fields = event.fields
        proposal_id = int(fields["proposalId"])
        descriptive = {
            "title": fields["title"],
            "proposer": fields["proposer"],
            "start_block": int(fields["startBlock"]),
            "end_block": int(fields["endBlock"]),
        }

        with get_db(self._session_factory) as session:
            dao_id = self._dao_id(session, event)
            proposal, created = get_or_create_proposal(
                session, dao_id, proposal_id, state=PROPOSAL_PENDING, description="", **descriptive
            )
            if not created:
                # Placeholder from an earlier vote: complete it, keep tallies and state
                for key, value in descriptive.items():
                    setattr(proposal, key, value)
            self._activity(
                session,
                dao_id,
                event,
                "ProposalCreated",
                fields["proposer"],
                proposalId=str(proposal_id),
                title=fields["title"],
            )
        self.logger.info("Indexed proposal %d: %s", proposal_id, fields["title"])
        return []

    def on_vote_cast(self, event: DecodedEvent) -> list[WatchedContract]:
        fields = event.fields
        voter = fields["voter"]
        proposal_id = int(fields["proposalId"])
        support = int(fields["support"])
        votes = int(fields["votes"])
        if support not in TALLY_COLUMNS:
            raise ProjectionError(f"Unknown support value {support} in {event.describe()}")

        with get_db(self._session_factory) as session:
            dao_id = self._dao_id(session, event)
            proposal = self._proposal_or_placeholder(session, dao_id, proposal_id)
            member, _ = get_or_create_member(
                session, dao_id, voter, voting_power=votes, share_percentage=0.0, is_active=True
            )

            if find_vote(session, member.id, proposal.id, event.tx_hash, event.log_index) is not None:
                self.logger.debug("Duplicate vote %s:%d ignored", event.tx_hash, event.log_index)
                return []

            member.voting_power = votes
            insert_vote(
                session,
                member_id=member.id,
                proposal_id=proposal.id,
                support=support,
                voting_power=votes,
                tx_hash=event.tx_hash,
                log_index=event.log_index,
                block_number=event.block_number,
            )
            increment_tally(session, proposal.id, support, votes)
            self._activity(
                session,
                dao_id,
                event,
                "VoteCast",
                voter,
                proposalId=str(proposal_id),
                support=support,
                votes=str(votes),
            )
        self.logger.info("Indexed vote from %s on proposal %d", voter, proposal_id)
        return []

    def on_proposal_executed(self, event: DecodedEvent) -> list[WatchedContract]:
        return self._set_proposal_state(event, PROPOSAL_EXECUTED)

    def on_proposal_canceled(self, event: DecodedEvent) -> list[WatchedContract]:
        return self._set_proposal_state(event, PROPOSAL_CANCELED)

    def _set_proposal_state(self, event: DecodedEvent, state: str) -> list[WatchedContract]:
        proposal_id = int(event.fields["proposalId"])
        with get_db(self._session_factory) as session:
            dao_id = self._dao_id(session, event)
            proposal = self._proposal_or_placeholder(session, dao_id, proposal_id)
            proposal.state = state
            self._activity(session, dao_id, event, event.event_name, None, proposalId=str(proposal_id))
        return []

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    def on_member_added(self, event: DecodedEvent) -> list[WatchedContract]:
        return self._set_membership(event, active=True)

    def on_member_removed(self, event: DecodedEvent) -> list[WatchedContract]:
        return self._set_membership(event, active=False)

    def _set_membership(self, event: DecodedEvent, active: bool) -> list[WatchedContract]:
        address = event.fields["member"]
        with get_db(self._session_factory) as session:
            dao_id = self._dao_id(session, event)
            member, created = get_or_create_member(
                session,
                dao_id,
                address,
                voting_power=MEMBER_ADDED_VOTING_POWER if active else 0,
                share_percentage=0.0,
                is_active=active,
                last_event_block=event.block_number,
                last_event_log_index=event.log_index,
            )
            if not created:
                last = (member.last_event_block, member.last_event_log_index)
                if last[0] is None or event.position > last:
                    member.is_active = active
                    member.last_event_block = event.block_number
                    member.last_event_log_index = event.log_index
                else:
                    self.logger.debug("Stale %s for %s ignored", event.event_name, address)
            self._activity(session, dao_id, event, event.event_name, address)
        return []

    # ------------------------------------------------------------------
    # Treasury
    # ------------------------------------------------------------------

    def on_deposit(self, event: DecodedEvent) -> list[WatchedContract]:
        return self._treasury_activity(event, "TreasuryDeposit", event.fields["from"])

    def on_withdrawal(self, event: DecodedEvent) -> list[WatchedContract]:
        return self._treasury_activity(event, "TreasuryWithdrawal", event.fields["to"])

    def _treasury_activity(self, event: DecodedEvent, activity_type: str, actor: str) -> list[WatchedContract]:
        with get_db(self._session_factory) as session:
            dao_id = self._dao_id(session, event)
            self._activity(
                session,
                dao_id,
                event,
                activity_type,
                actor,
                token=event.fields["token"],
                amount=str(event.fields["amount"]),
            )
        return []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _dao_id(self, session: Session, event: DecodedEvent) -> int:
        """Owning DAO, taken from the emitting contract's registry entry."""
        watch = self.registry.get(event.address, session=session)
        if watch is None or watch.parent_dao_id is None:
            raise ProjectionError(f"No DAO registered for contract {event.address} ({event.describe()})")
        return watch.parent_dao_id

    @staticmethod
    def _proposal_or_placeholder(session: Session, dao_id: int, proposal_id: int):
        proposal, _ = get_or_create_proposal(
            session, dao_id, proposal_id, state=PROPOSAL_PENDING, title="", description=""
        )
        return proposal

    @staticmethod
    def _activity(
        session: Session,
        dao_id: int,
        event: DecodedEvent,
        activity_type: str,
        actor: str | None,
        occurred_at: datetime | None = None,
        **metadata,
    ) -> None:
        append_activity(
            session,
            dao_id=dao_id,
            type=activity_type,
            actor=actor,
            metadata={"txHash": event.tx_hash, "blockNumber": event.block_number, **metadata},
            tx_hash=event.tx_hash,
            log_index=event.log_index,
            block_number=event.block_number,
            timestamp=occurred_at,
        )
