"""Event schema registry.

Static table of (contract kind, event name) -> ordered field layout for every
event the indexer understands. Loaded once at import; never mutated.

Example:
    >>> from src.chain.schema import ContractKind, get_schema, topic_for
    >>> schema = get_schema(ContractKind.GOVERNANCE, "VoteCast")
    >>> schema.signature
    'VoteCast(address,uint256,uint8,uint256)'
"""

from dataclasses import dataclass
from enum import Enum

from eth_utils import encode_hex, keccak

PRIMITIVE_TYPES = frozenset({"address", "string", "uint256", "uint8", "bool"})


class ContractKind(str, Enum):
    """Kinds of contract the indexer watches."""

    FACTORY = "Factory"
    CORE = "Core"
    GOVERNANCE = "Governance"
    TREASURY = "Treasury"


@dataclass(frozen=True)
class EventField:
    """One parameter of an event."""

    name: str
    type: str
    indexed: bool = False

    def __post_init__(self) -> None:
        if self.type not in PRIMITIVE_TYPES:
            raise ValueError(f"Unsupported field type: {self.type}")


@dataclass(frozen=True)
class EventSchema:
    """Immutable descriptor for an on-chain event."""

    kind: ContractKind
    name: str
    fields: tuple[EventField, ...]

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(f.type for f in self.fields)})"

    @property
    def indexed_fields(self) -> tuple[EventField, ...]:
        return tuple(f for f in self.fields if f.indexed)

    @property
    def data_fields(self) -> tuple[EventField, ...]:
        return tuple(f for f in self.fields if not f.indexed)

    def to_abi(self) -> dict:
        """Render the schema as a JSON ABI event entry."""
        return {
            "type": "event",
            "name": self.name,
            "anonymous": False,
            "inputs": [{"name": f.name, "type": f.type, "indexed": f.indexed} for f in self.fields],
        }


def _event(kind: ContractKind, name: str, *fields: EventField) -> EventSchema:
    return EventSchema(kind=kind, name=name, fields=tuple(fields))


EVENT_SCHEMAS: tuple[EventSchema, ...] = (
    # DAOFactory
    _event(
        ContractKind.FACTORY,
        "DAOCreated",
        EventField("daoAddress", "address", indexed=True),
        EventField("creator", "address", indexed=True),
        EventField("name", "string"),
        EventField("timestamp", "uint256"),
    ),
    _event(
        ContractKind.FACTORY,
        "DAODeactivated",
        EventField("daoAddress", "address", indexed=True),
    ),
    # GovernanceModule
    _event(
        ContractKind.GOVERNANCE,
        "ProposalCreated",
        EventField("proposalId", "uint256", indexed=True),
        EventField("proposer", "address", indexed=True),
        EventField("title", "string"),
        EventField("startBlock", "uint256"),
        EventField("endBlock", "uint256"),
    ),
    _event(
        ContractKind.GOVERNANCE,
        "VoteCast",
        EventField("voter", "address", indexed=True),
        EventField("proposalId", "uint256", indexed=True),
        EventField("support", "uint8"),
        EventField("votes", "uint256"),
    ),
    _event(
        ContractKind.GOVERNANCE,
        "ProposalExecuted",
        EventField("proposalId", "uint256", indexed=True),
    ),
    _event(
        ContractKind.GOVERNANCE,
        "ProposalCanceled",
        EventField("proposalId", "uint256", indexed=True),
    ),
    # DAOCore
    _event(ContractKind.CORE, "MemberAdded", EventField("member", "address", indexed=True)),
    _event(ContractKind.CORE, "MemberRemoved", EventField("member", "address", indexed=True)),
    # TreasuryModule
    _event(
        ContractKind.TREASURY,
        "Deposit",
        EventField("from", "address", indexed=True),
        EventField("token", "address", indexed=True),
        EventField("amount", "uint256"),
    ),
    _event(
        ContractKind.TREASURY,
        "Withdrawal",
        EventField("to", "address", indexed=True),
        EventField("token", "address", indexed=True),
        EventField("amount", "uint256"),
    ),
)

# daoInfo(address) view on the factory; returns the DAO's module addresses
DAO_INFO_ABI: dict = {
    "type": "function",
    "name": "daoInfo",
    "stateMutability": "view",
    "inputs": [{"name": "", "type": "address"}],
    "outputs": [
        {"name": "name", "type": "string"},
        {"name": "creator", "type": "address"},
        {"name": "governance", "type": "address"},
        {"name": "treasury", "type": "address"},
        {"name": "membership", "type": "address"},
        {"name": "createdAt", "type": "uint256"},
        {"name": "isActive", "type": "bool"},
    ],
}

_BY_KEY: dict[tuple[ContractKind, str], EventSchema] = {(s.kind, s.name): s for s in EVENT_SCHEMAS}


def topic_for(schema: EventSchema) -> str:
    """Return topic0 (keccak256 of the canonical signature) as 0x-hex."""
    return encode_hex(keccak(text=schema.signature))


_BY_TOPIC: dict[tuple[ContractKind, str], EventSchema] = {
    (s.kind, topic_for(s)): s for s in EVENT_SCHEMAS
}


def get_schema(kind: ContractKind, name: str) -> EventSchema | None:
    return _BY_KEY.get((ContractKind(kind), name))


def schemas_for(kind: ContractKind) -> tuple[EventSchema, ...]:
    kind = ContractKind(kind)
    return tuple(s for s in EVENT_SCHEMAS if s.kind is kind)


def topics_for(kind: ContractKind) -> list[str]:
    """All topic0 values registered for a contract kind."""
    return [topic_for(s) for s in schemas_for(kind)]


def schema_for_topic(kind: ContractKind, topic: str) -> EventSchema | None:
    return _BY_TOPIC.get((ContractKind(kind), topic.lower()))
