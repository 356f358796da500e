"""Chain access: event schemas, log decoding and the chain reader."""

from src.chain.decoder import DecodedEvent, EventDecoder, RawEvent
from src.chain.reader import BaseChainReader, Subscription, Web3ChainReader
from src.chain.schema import (
    DAO_INFO_ABI,
    EVENT_SCHEMAS,
    ContractKind,
    EventField,
    EventSchema,
    get_schema,
    schema_for_topic,
    schemas_for,
    topic_for,
    topics_for,
)

__all__ = [
    "BaseChainReader",
    "Subscription",
    "Web3ChainReader",
    "RawEvent",
    "DecodedEvent",
    "EventDecoder",
    "ContractKind",
    "EventField",
    "EventSchema",
    "EVENT_SCHEMAS",
    "DAO_INFO_ABI",
    "get_schema",
    "schemas_for",
    "schema_for_topic",
    "topic_for",
    "topics_for",
]
