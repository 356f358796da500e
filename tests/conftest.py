"""
Root pytest configuration.

Provides an in-memory SQLite derived store (one shared connection through
StaticPool, so worker threads see the same database) and a scripted chain
reader that serves logs built with eth_abi, exactly as a node would return
them. No PostgreSQL server or RPC endpoint is needed.
"""

import os

# Keep the module-level engine off PostgreSQL during tests
os.environ.setdefault("DATABASE_URL", "sqlite://")

from types import SimpleNamespace  # noqa: E402

import pytest  # noqa: E402
from eth_abi import encode as abi_encode  # noqa: E402
from eth_utils import encode_hex, to_checksum_address  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from src.chain.decoder import EventDecoder, RawEvent  # noqa: E402
from src.chain.reader import BaseChainReader, Subscription  # noqa: E402
from src.chain.schema import ContractKind, get_schema, topic_for  # noqa: E402
from src.indexer.checkpoint import CheckpointStore  # noqa: E402
from src.indexer.dispatcher import EventDispatcher  # noqa: E402
from src.indexer.pipeline import EventPipeline  # noqa: E402
from src.indexer.projection import ProjectionEngine  # noqa: E402
from src.indexer.registry import ContractRegistry  # noqa: E402
from src.indexer.scanner import BackfillScanner  # noqa: E402
from src.shared.db import Base  # noqa: E402
from src.shared.exceptions import ChainReadError  # noqa: E402

ADDRESSES = SimpleNamespace(
    factory=to_checksum_address("0x5fbdb2315678afecb367f032d93f642f64180aa3"),
    dao=to_checksum_address("0xa16e02e87b7454126e5e10d957a927a7f5b5d2be"),
    governance=to_checksum_address("0xb7a5bd0345ef1cc5e66bf61bdec17d2461fbd968"),
    treasury=to_checksum_address("0xeebe00ac0756308ac4aabfd76c05c4f3088b8883"),
    membership=to_checksum_address("0x10c6e9530f1c1af873a391030a1d9e8ed0630d26"),
    creator=to_checksum_address("0xf39fd6e51aad88f6f4ce6ab8827279cfffb92266"),
    alice=to_checksum_address("0x70997970c51812dc3a010c7d01b50e0d17dc79c8"),
    bob=to_checksum_address("0x3c44cdddb6a900fa2b585dd299e03d12fa4293bc"),
    token=to_checksum_address("0x0000000000000000000000000000000000000000"),
)


# ---------------------------------------------------------------------------
# Scripted chain
# ---------------------------------------------------------------------------


def make_log(kind, event_name, address, block_number, log_index=0, tx_hash=None, removed=False, **fields):
    """Build the RawEvent a node would return for `kind.event_name(**fields)`."""
    schema = get_schema(kind, event_name)
    topics = [topic_for(schema)]
    for field in schema.indexed_fields:
        topics.append(encode_hex(abi_encode([field.type], [fields[field.name]])))
    data_fields = schema.data_fields
    data = (
        encode_hex(abi_encode([f.type for f in data_fields], [fields[f.name] for f in data_fields]))
        if data_fields
        else "0x"
    )
    return RawEvent(
        address=address,
        topics=tuple(topics),
        data=data,
        block_number=block_number,
        tx_hash=tx_hash or "0x" + f"{block_number:032x}{log_index:032x}",
        log_index=log_index,
        removed=removed,
    )


class FakeSubscription(Subscription):
    def __init__(self, address, topics, callback):
        self.address = address
        self.topics = list(topics)
        self.callback = callback
        self.active = True

    def unsubscribe(self):
        self.active = False


class FakeChainReader(BaseChainReader):
    """In-memory chain: logs are added by tests and served by address/topic/range."""

    def __init__(self):
        self.height = 0
        self.logs: list[RawEvent] = []
        self.dao_info: dict[str, dict] = {}
        self.subscriptions: list[FakeSubscription] = []
        self.queries: list[tuple[str, int, int]] = []
        self.calls: list[tuple[str, str, tuple]] = []
        self.fail_height = False
        self.fail_queries = False
        self.fail_subscribe = False

    def add(self, *raws: RawEvent) -> None:
        for raw in raws:
            self.logs.append(raw)
            self.height = max(self.height, raw.block_number)

    def register_dao(self, dao, governance, treasury, membership=None, name="Test DAO"):
        self.dao_info[dao] = {
            "name": name,
            "creator": ADDRESSES.creator,
            "governance": governance,
            "treasury": treasury,
            "membership": membership or ADDRESSES.membership,
            "createdAt": 1700000000,
            "isActive": True,
        }

    def emit(self, raw: RawEvent) -> None:
        """Push a log to every active subscription that matches it."""
        for sub in list(self.subscriptions):
            if sub.active and sub.address == raw.address and raw.topics[0] in sub.topics:
                sub.callback(raw)

    def current_height(self):
        if self.fail_height:
            raise ChainReadError("eth_blockNumber failed")
        return self.height

    def query_events(self, address, topics, from_block, to_block):
        self.queries.append((address, from_block, to_block))
        if self.fail_queries:
            raise ChainReadError("eth_getLogs failed")
        matching = [
            raw
            for raw in self.logs
            if raw.address == address and raw.topics[0] in topics and from_block <= raw.block_number <= to_block
        ]
        return sorted(matching, key=lambda raw: raw.position)

    def subscribe(self, address, topics, callback):
        if self.fail_subscribe:
            raise ChainReadError("eth_newFilter failed")
        sub = FakeSubscription(address, topics, callback)
        self.subscriptions.append(sub)
        return sub

    def call(self, address, function_abi, args=()):
        self.calls.append((address, function_abi["name"], tuple(args)))
        info = self.dao_info.get(args[0])
        if info is None:
            raise ChainReadError(f"daoInfo reverted for {args[0]}")
        return dict(info)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def addresses():
    return ADDRESSES


@pytest.fixture
def log_factory():
    return make_log


@pytest.fixture
def db_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def chain():
    return FakeChainReader()


@pytest.fixture
def registry(session_factory):
    return ContractRegistry(session_factory)


@pytest.fixture
def checkpoint(session_factory):
    return CheckpointStore("test", session_factory)


@pytest.fixture
def projection(registry, chain, session_factory):
    return ProjectionEngine(registry, chain, session_factory)


@pytest.fixture
def dispatcher(projection, session_factory):
    return EventDispatcher(projection, session_factory, max_attempts=3)


@pytest.fixture
def pipeline(dispatcher):
    pipeline = EventPipeline(dispatcher)
    yield pipeline
    pipeline.stop(timeout=5)


@pytest.fixture
def scanner(registry, chain, pipeline):
    return BackfillScanner(registry, chain, pipeline, chunk_size=10)


@pytest.fixture
def dao_world(chain, registry, addresses, log_factory):
    """Factory watched, one DAO created at block 1 (log 0) and known to the chain."""
    registry.seed_factory(addresses.factory)
    chain.register_dao(addresses.dao, addresses.governance, addresses.treasury)
    created = log_factory(
        ContractKind.FACTORY,
        "DAOCreated",
        addresses.factory,
        1,
        0,
        daoAddress=addresses.dao,
        creator=addresses.creator,
        name="Test DAO",
        timestamp=1700000000,
    )
    chain.add(created)
    return SimpleNamespace(created=created)


@pytest.fixture
def event_factory(log_factory):
    """Build decoded events the way the scanner and listener produce them."""
    decoder = EventDecoder()

    def build(kind, event_name, address, block_number, log_index=0, **fields):
        return decoder.decode(kind, log_factory(kind, event_name, address, block_number, log_index, **fields))

    return build
