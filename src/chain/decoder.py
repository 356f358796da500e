"""Raw log -> decoded event transformation.

A raw log is decoded against the schema registered for the kind of contract
that emitted it: indexed parameters come from topics[1:], the rest from the
ABI-encoded data section.
"""

from dataclasses import dataclass, field
from typing import Any, Mapping

from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import decode_hex, encode_hex, to_checksum_address

from src.chain.schema import ContractKind, EventSchema, schema_for_topic
from src.shared.exceptions import DecodeError


def _to_hex(value: Any) -> str:
    if isinstance(value, str):
        return value.lower() if value.startswith("0x") else "0x" + value.lower()
    return encode_hex(bytes(value))


@dataclass(frozen=True)
class RawEvent:
    """A log entry as returned by eth_getLogs / eth_getFilterChanges."""

    address: str
    topics: tuple[str, ...]
    data: str
    block_number: int
    tx_hash: str
    log_index: int
    removed: bool = False

    @classmethod
    def from_log(cls, log: Mapping[str, Any]) -> "RawEvent":
        """Build from a JSON-RPC / web3 log mapping (hex strings or bytes)."""
        block_number = log["blockNumber"]
        log_index = log["logIndex"]
        return cls(
            address=to_checksum_address(log["address"]),
            topics=tuple(_to_hex(t) for t in log["topics"]),
            data=_to_hex(log.get("data") or b""),
            block_number=int(block_number, 16) if isinstance(block_number, str) else int(block_number),
            tx_hash=_to_hex(log["transactionHash"]),
            log_index=int(log_index, 16) if isinstance(log_index, str) else int(log_index),
            removed=bool(log.get("removed", False)),
        )

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class DecodedEvent:
    """A log with its fields decoded into named Python values."""

    address: str
    contract_kind: ContractKind
    event_name: str
    fields: dict[str, Any] = field(hash=False)
    block_number: int
    tx_hash: str
    log_index: int

    @property
    def position(self) -> tuple[int, int]:
        return (self.block_number, self.log_index)

    def describe(self) -> str:
        return (
            f"{self.contract_kind.value}.{self.event_name} at {self.address} "
            f"block={self.block_number} tx={self.tx_hash} log={self.log_index}"
        )


class EventDecoder:
    """Decode raw logs using the event schema registry."""

    def decode(self, kind: ContractKind, raw: RawEvent) -> DecodedEvent:
        """Decode one raw log emitted by a contract of the given kind.

        Raises:
            DecodeError: Unknown topic, wrong topic count, or malformed payload.
        """
        kind = ContractKind(kind)
        if not raw.topics:
            raise DecodeError(f"Log without topics at {raw.address} tx={raw.tx_hash}")

        schema = schema_for_topic(kind, raw.topics[0])
        if schema is None:
            raise DecodeError(f"No {kind.value} event registered for topic {raw.topics[0]}")

        try:
            fields = self._decode_fields(schema, raw)
        except (DecodingError, ValueError, TypeError) as exc:
            raise DecodeError(f"Cannot decode {schema.signature} tx={raw.tx_hash}: {exc}") from exc

        return DecodedEvent(
            address=raw.address,
            contract_kind=kind,
            event_name=schema.name,
            fields=fields,
            block_number=raw.block_number,
            tx_hash=raw.tx_hash,
            log_index=raw.log_index,
        )

    @staticmethod
    def _decode_fields(schema: EventSchema, raw: RawEvent) -> dict[str, Any]:
        indexed = schema.indexed_fields
        topics = raw.topics[1:]
        if len(topics) != len(indexed):
            raise DecodeError(
                f"{schema.signature} expects {len(indexed)} indexed topics, got {len(topics)}"
            )

        values: dict[str, Any] = {}
        for event_field, topic in zip(indexed, topics):
            (values[event_field.name],) = abi_decode([event_field.type], decode_hex(topic))

        data_fields = schema.data_fields
        if data_fields:
            decoded = abi_decode([f.type for f in data_fields], decode_hex(raw.data))
            values.update(zip((f.name for f in data_fields), decoded))

        # Keep the schema's field order and checksum addresses
        ordered = {}
        for event_field in schema.fields:
            value = values[event_field.name]
            if event_field.type == "address":
                value = to_checksum_address(value)
            ordered[event_field.name] = value
        return ordered
