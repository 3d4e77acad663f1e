"""
Call encoder - entry-point schemas and calldata encoding.

A ContractSchema lists the entry points and events a contract exposes.
Encoding reproduces the EVM calling convention:

    selector = keccak256("name(type1,type2,...)")[:4]
    calldata = selector || abi_encode(types, args)

Arguments are validated against their declared types before they reach
eth_abi, so that a negative uint or a 31-byte bytes32 is rejected as
ArgumentTypeMismatch instead of being silently padded.

Schemas for the relay and the bundled target adapters are registered at
import time; additional schemas can be added with register_schema().
"""

import re
from dataclasses import dataclass, field
from typing import Any, Sequence

from eth_abi import decode as abi_decode
from eth_abi import encode as abi_encode
from eth_abi.exceptions import DecodingError, EncodingError as AbiEncodingError
from eth_utils import (
    event_signature_to_log_topic,
    function_signature_to_4byte_selector,
    is_address,
    to_checksum_address,
)

from moebius.errors import ArgumentTypeMismatch, DecodeError, UnknownEntryPoint
from moebius import identifiers


SIGNATURE_PATTERN = re.compile(r"^([A-Za-z_][A-Za-z0-9_]*)\((.*)\)$")
_INT_PATTERN = re.compile(r"^(u?)int(\d*)$")
_FIXED_BYTES_PATTERN = re.compile(r"^bytes(\d+)$")


def _split_types(type_list: str) -> tuple[str, ...]:
    type_list = type_list.replace(" ", "")
    if not type_list:
        return ()
    return tuple(type_list.split(","))


def _normalize_value(abi_type: str, value: Any) -> Any:
    """
    Validate and normalize a single value for its ABI type.

    Raises:
        ValueError: If the value is not acceptable for the type
    """
    int_match = _INT_PATTERN.match(abi_type)
    if int_match:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValueError("expected an integer")
        bits = int(int_match.group(2) or 256)
        if int_match.group(1):
            if value < 0:
                raise ValueError("unsigned integer cannot be negative")
            if value >= 2 ** bits:
                raise ValueError(f"does not fit in {bits} bits")
        elif not -(2 ** (bits - 1)) <= value < 2 ** (bits - 1):
            raise ValueError(f"does not fit in {bits} bits")
        return value

    if abi_type == "address":
        if isinstance(value, (bytes, bytearray)):
            if len(value) != 20:
                raise ValueError("address must be 20 bytes")
            value = "0x" + bytes(value).hex()
        if not isinstance(value, str) or not is_address(value):
            raise ValueError("expected a 20-byte hex address")
        return to_checksum_address(value)

    bytes_match = _FIXED_BYTES_PATTERN.match(abi_type)
    if bytes_match or abi_type == "bytes":
        if isinstance(value, str):
            if not value.startswith("0x"):
                raise ValueError("hex string must be 0x-prefixed")
            try:
                value = bytes.fromhex(value[2:])
            except ValueError:
                raise ValueError("invalid hex string")
        if not isinstance(value, (bytes, bytearray)):
            raise ValueError("expected bytes")
        if bytes_match and len(value) != int(bytes_match.group(1)):
            raise ValueError(f"expected exactly {bytes_match.group(1)} bytes, got {len(value)}")
        return bytes(value)

    if abi_type == "bool":
        if not isinstance(value, bool):
            raise ValueError("expected a bool")
        return value

    if abi_type == "string":
        if not isinstance(value, str):
            raise ValueError("expected a string")
        return value

    return value


def _normalize_output(abi_type: str, value: Any) -> Any:
    if abi_type == "address":
        return to_checksum_address(value)
    return value


def encode_values(types: Sequence[str], values: Sequence[Any], context: str = "values") -> bytes:
    """ABI-encode values against types, validating each one first."""
    types = list(types)
    values = list(values)
    if len(types) != len(values):
        raise ArgumentTypeMismatch(
            context, len(values), f"{len(types)} arguments", values,
            reason=f"expected {len(types)} values, got {len(values)}",
        )

    normalized = []
    for index, (abi_type, value) in enumerate(zip(types, values)):
        try:
            normalized.append(_normalize_value(abi_type, value))
        except ValueError as e:
            raise ArgumentTypeMismatch(context, index, abi_type, value, reason=str(e)) from e

    try:
        return abi_encode(types, normalized)
    except (AbiEncodingError, TypeError, ValueError) as e:
        raise ArgumentTypeMismatch(context, 0, ",".join(types), values, reason=str(e)) from e


def decode_values(types: Sequence[str], data: bytes, context: str = "values") -> tuple:
    """
    ABI-decode data against types.

    Raises:
        DecodeError: If the data does not match the types
    """
    try:
        decoded = abi_decode(list(types), bytes(data))
    except (DecodingError, TypeError, ValueError, OverflowError) as e:
        raise DecodeError(f"Cannot decode {context} as ({','.join(types)}): {e}") from e
    return tuple(_normalize_output(t, v) for t, v in zip(types, decoded))


@dataclass(frozen=True)
class EntryPoint:
    """
    A callable entry point of a contract.

    Attributes:
        name: Function name
        inputs: ABI types of the arguments, in order
        outputs: ABI types of the return values, in order
        mutability: "view" for pure reads, "nonpayable" for state changes
        input_names: Optional argument names (used for the JSON ABI)
        output_names: Optional return value names (used for the JSON ABI)
    """
    name: str
    inputs: tuple[str, ...] = ()
    outputs: tuple[str, ...] = ()
    mutability: str = "nonpayable"
    input_names: tuple[str, ...] = ()
    output_names: tuple[str, ...] = ()

    @classmethod
    def parse(cls, signature: str, outputs: Sequence[str] = (), mutability: str = "nonpayable") -> "EntryPoint":
        """Build an EntryPoint from a canonical signature like 'f(uint256,address)'."""
        match = SIGNATURE_PATTERN.match(signature.strip())
        if not match:
            raise UnknownEntryPoint("<signature>", signature)
        return cls(
            name=match.group(1),
            inputs=_split_types(match.group(2)),
            outputs=tuple(outputs),
            mutability=mutability,
        )

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def selector(self) -> bytes:
        return function_signature_to_4byte_selector(self.signature)

    @property
    def is_view(self) -> bool:
        return self.mutability in ("view", "pure")

    def encode(self, args: Sequence[Any] = ()) -> bytes:
        """Encode selector followed by the canonically encoded arguments."""
        return self.selector + encode_values(self.inputs, args, context=self.signature)

    def decode_arguments(self, payload: bytes) -> tuple:
        if bytes(payload[:4]) != self.selector:
            raise DecodeError(f"Payload selector does not match {self.signature}")
        return decode_values(self.inputs, payload[4:], context=f"{self.signature} arguments")

    def encode_output(self, values: Sequence[Any]) -> bytes:
        return encode_values(self.outputs, values, context=f"{self.signature} outputs")

    def decode_output(self, data: bytes) -> tuple:
        return decode_values(self.outputs, data, context=f"{self.signature} outputs")

    def to_abi(self) -> dict[str, Any]:
        return {
            "type": "function",
            "name": self.name,
            "stateMutability": self.mutability,
            "inputs": _abi_params(self.inputs, self.input_names),
            "outputs": _abi_params(self.outputs, self.output_names),
        }


@dataclass(frozen=True)
class EventSpec:
    """A non-indexed event emitted by a contract."""
    name: str
    inputs: tuple[str, ...]
    input_names: tuple[str, ...] = ()

    @property
    def signature(self) -> str:
        return f"{self.name}({','.join(self.inputs)})"

    @property
    def topic(self) -> bytes:
        return event_signature_to_log_topic(self.signature)

    def encode_data(self, values: Sequence[Any]) -> bytes:
        return encode_values(self.inputs, values, context=self.signature)

    def decode_data(self, data: bytes) -> tuple:
        return decode_values(self.inputs, data, context=self.signature)

    def to_abi(self) -> dict[str, Any]:
        params = _abi_params(self.inputs, self.input_names)
        for param in params:
            param["indexed"] = False
        return {"type": "event", "name": self.name, "anonymous": False, "inputs": params}


def _abi_params(types: Sequence[str], names: Sequence[str]) -> list[dict[str, Any]]:
    params = []
    for i, abi_type in enumerate(types):
        name = names[i] if i < len(names) else ""
        params.append({"name": name, "type": abi_type})
    return params


@dataclass(frozen=True)
class ContractSchema:
    """
    Entry points, events and constructor parameters of a contract.

    The schema is the out-of-band agreement between whoever encodes calls
    (or decodes results) and the deployed contract.
    """
    name: str
    entry_points: tuple[EntryPoint, ...]
    events: tuple[EventSpec, ...] = ()
    constructor: tuple[str, ...] = ()
    _by_name: dict = field(init=False, repr=False, compare=False, default_factory=dict)

    def __post_init__(self):
        for ep in self.entry_points:
            self._by_name[ep.name] = ep
            self._by_name[ep.signature] = ep

    def entry_point(self, name: str) -> EntryPoint:
        """Look up an entry point by name or canonical signature."""
        ep = self._by_name.get(name.replace(" ", ""))
        if ep is None:
            raise UnknownEntryPoint(self.name, name)
        return ep

    def by_selector(self, selector: bytes) -> EntryPoint:
        for ep in self.entry_points:
            if ep.selector == bytes(selector):
                return ep
        raise UnknownEntryPoint(self.name, "0x" + bytes(selector).hex())

    def event(self, name: str) -> EventSpec:
        for ev in self.events:
            if ev.name == name:
                return ev
        raise UnknownEntryPoint(self.name, name)

    def encode(self, entry_point: str, args: Sequence[Any] = ()) -> bytes:
        return self.entry_point(entry_point).encode(args)

    def decode_output(self, entry_point: str, data: bytes) -> tuple:
        return self.entry_point(entry_point).decode_output(data)

    def to_abi(self) -> list[dict[str, Any]]:
        abi: list[dict[str, Any]] = []
        if self.constructor:
            abi.append({
                "type": "constructor",
                "stateMutability": "nonpayable",
                "inputs": _abi_params(self.constructor, ()),
            })
        abi.extend(ep.to_abi() for ep in self.entry_points)
        abi.extend(ev.to_abi() for ev in self.events)
        return abi


# -----------------------------------------------------------------------------
# Bundled schemas
# -----------------------------------------------------------------------------

# Event wire shape: (correlationKey: bytes32, packedResult: bytes)
CORRELATION_EVENT = EventSpec(
    "MoebiusData", ("bytes32", "bytes"), input_names=("_accountId", "_packedData"),
)

MOEBIUS = ContractSchema(
    name="Moebius",
    entry_points=(
        EntryPoint("execute", ("address", "bytes"), ("bytes",),
                   input_names=("_target", "_data"), output_names=("_response",)),
        EntryPoint("pause"),
        EntryPoint("unpause"),
        EntryPoint("paused", outputs=("bool",), mutability="view"),
        EntryPoint("owner", outputs=("address",), mutability="view"),
    ),
    events=(CORRELATION_EVENT,),
)

# State schema shared by getValues() and setAndGetValues()
SIMPLE_VALUES = ("bytes32", "address", "uint256")

SIMPLE_CONTRACT = ContractSchema(
    name="SimpleContract",
    entry_points=(
        EntryPoint("programId", outputs=("bytes32",), mutability="view"),
        EntryPoint("accountId", outputs=("bytes32",), mutability="view"),
        EntryPoint("getValues", outputs=SIMPLE_VALUES, mutability="view"),
        EntryPoint("setAndGetValues", SIMPLE_VALUES, SIMPLE_VALUES,
                   input_names=("_valBytes32", "_valAddress", "_valUint256")),
    ),
    constructor=("bytes32", "bytes32") + SIMPLE_VALUES,
)

ORACLE_VALUES = ("address", "uint256", "address", "uint256")

UNISWAP_ORACLE = ContractSchema(
    name="UniswapOracle",
    entry_points=(
        EntryPoint("programId", outputs=("bytes32",), mutability="view"),
        EntryPoint("accountId", outputs=("bytes32",), mutability="view"),
        EntryPoint("getValues", outputs=ORACLE_VALUES, mutability="view",
                   output_names=("token0", "amount0", "token1", "amount1")),
        EntryPoint("updateAndConsult", ("address", "uint256"), ("uint256",),
                   input_names=("token", "amountIn"), output_names=("amountOut",)),
    ),
    constructor=("bytes32", "bytes32", "address", "address", "address"),
)


_SCHEMAS: dict[str, ContractSchema] = {
    schema.name: schema for schema in (MOEBIUS, SIMPLE_CONTRACT, UNISWAP_ORACLE)
}


def get_schema(name: str) -> ContractSchema:
    """Get a registered contract schema by name."""
    schema = _SCHEMAS.get(name)
    if schema is None:
        raise ValueError(f"Unknown contract schema: {name}")
    return schema


def register_schema(schema: ContractSchema) -> None:
    """Register (or replace) a contract schema by its name."""
    _SCHEMAS[schema.name] = schema


def list_schemas() -> list[str]:
    return sorted(_SCHEMAS)


def coerce_argument(abi_type: str, text: str) -> Any:
    """
    Convert command-line text into a value for an ABI type.

    Integers accept any int() literal (including 0x); bytes32 also
    accepts base58 identifiers.
    """
    if _INT_PATTERN.match(abi_type):
        try:
            return int(text, 0)
        except ValueError:
            raise ArgumentTypeMismatch("<cli>", 0, abi_type, text, reason="not an integer")
    if abi_type == "bool":
        flag = text.strip().lower()
        if flag in ("1", "true", "yes"):
            return True
        if flag in ("0", "false", "no"):
            return False
        raise ArgumentTypeMismatch("<cli>", 0, abi_type, text, reason="not a boolean")
    if abi_type == "bytes32" and not text.startswith("0x"):
        return identifiers.decode(text)
    return text
