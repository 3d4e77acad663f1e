"""
On-ledger programs executed by InMemoryLedger.

- RelayProgram: the Moebius dispatch point. Forwards opaque calldata to a
  target, then reads the target's accountId() and getValues() and emits
  MoebiusData(accountId, packedValues).
- SimpleContract: target with a (bytes32, address, uint256) state.
- UniswapOracle: target refreshed by the keeper through updateAndConsult().

Entry points are dispatched by selector against the contract schema to a
method named after the entry point in snake_case. Every method receives
the CallContext first, then the decoded arguments.
"""

import re
from abc import ABC
from dataclasses import dataclass
from typing import Any, Callable, Optional

from eth_utils import to_checksum_address

from moebius.abi import (
    CORRELATION_EVENT,
    MOEBIUS,
    SIMPLE_CONTRACT,
    UNISWAP_ORACLE,
    ContractSchema,
    EntryPoint,
)
from moebius.errors import DecodeError, UnknownEntryPoint
from moebius.ledger import CallContext, Revert


# Revert reason the relay client maps to RelayUnavailable
PAUSED_REASON = "Moebius: paused"

# Entry points every correlatable target must expose
KEY_ENTRY_POINT = "accountId"
STATE_ENTRY_POINT = "getValues"

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _handler_name(entry_point: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", entry_point).lower()


class Program(ABC):
    """
    Base class for programs hosted by InMemoryLedger.

    All mutable state lives in `storage` so that the ledger can snapshot
    and restore it around reverted transactions.
    """

    schema: ContractSchema

    def __init__(self):
        self.address: Optional[str] = None
        self.deployer: Optional[str] = None
        self.storage: dict[str, Any] = {}

    def snapshot(self) -> dict[str, Any]:
        return dict(self.storage)

    def restore(self, state: dict[str, Any]) -> None:
        self.storage = dict(state)

    def invoke(self, ctx: CallContext, payload: bytes) -> bytes:
        """Decode the payload, run the matching entry point, encode its outputs."""
        if len(payload) < 4:
            raise Revert("missing function selector")
        try:
            entry_point = self.schema.by_selector(payload[:4])
        except UnknownEntryPoint:
            raise Revert(f"{self.schema.name}: unknown selector 0x{payload[:4].hex()}")
        try:
            args = entry_point.decode_arguments(payload)
        except DecodeError:
            raise Revert(f"{self.schema.name}: invalid arguments for {entry_point.signature}")

        result = getattr(self, _handler_name(entry_point.name))(ctx, *args)
        if not entry_point.outputs:
            return b""
        if not isinstance(result, tuple):
            result = (result,)
        return entry_point.encode_output(result)


# -----------------------------------------------------------------------------
# Relay
# -----------------------------------------------------------------------------

# Selectors only depend on the signature, so these work for any target
# that follows the accountId()/getValues() convention.
_KEY_CALL = EntryPoint(KEY_ENTRY_POINT, outputs=("bytes32",), mutability="view")
_STATE_CALL = EntryPoint(STATE_ENTRY_POINT, mutability="view")


class RelayProgram(Program):
    """Moebius: forwards calls and emits the correlation record."""

    schema = MOEBIUS

    def __init__(self):
        super().__init__()
        self.storage["paused"] = False

    def execute(self, ctx: CallContext, target: str, data: bytes) -> bytes:
        if self.storage["paused"]:
            raise Revert(PAUSED_REASON)

        response = ctx.call(target, data)

        try:
            (account_id,) = _KEY_CALL.decode_output(ctx.call(target, _KEY_CALL.encode()))
        except DecodeError:
            raise Revert(f"Moebius: target {target} has no accountId")
        # getValues() return data is already the ABI-packed state
        packed = ctx.call(target, _STATE_CALL.encode())

        ctx.emit([CORRELATION_EVENT.topic], CORRELATION_EVENT.encode_data([account_id, packed]))
        return response

    def pause(self, ctx: CallContext) -> None:
        self._only_owner(ctx)
        self.storage["paused"] = True

    def unpause(self, ctx: CallContext) -> None:
        self._only_owner(ctx)
        self.storage["paused"] = False

    def paused(self, ctx: CallContext) -> bool:
        return self.storage["paused"]

    def owner(self, ctx: CallContext) -> str:
        return self.deployer

    def _only_owner(self, ctx: CallContext) -> None:
        if ctx.sender != self.deployer:
            raise Revert("Moebius: caller is not the owner")


# -----------------------------------------------------------------------------
# Targets
# -----------------------------------------------------------------------------

class TargetProgram(Program):
    """
    Base for correlatable targets.

    The correlation key (accountId) and programId are bound at construction
    and never change.
    """

    def __init__(self, program_id: bytes, account_id: bytes):
        super().__init__()
        if len(program_id) != 32 or len(account_id) != 32:
            raise ValueError("programId and accountId must be 32 bytes")
        self._program_id = bytes(program_id)
        self._account_id = bytes(account_id)

    def program_id(self, ctx: CallContext) -> bytes:
        return self._program_id

    def account_id(self, ctx: CallContext) -> bytes:
        return self._account_id


class SimpleContract(TargetProgram):
    """Stores a (bytes32, address, uint256) triple."""

    schema = SIMPLE_CONTRACT

    def __init__(
        self,
        program_id: bytes,
        account_id: bytes,
        val_bytes32: bytes,
        val_address: str,
        val_uint256: int,
    ):
        super().__init__(program_id, account_id)
        self.storage.update({
            "val_bytes32": bytes(val_bytes32),
            "val_address": to_checksum_address(val_address),
            "val_uint256": int(val_uint256),
        })

    def get_values(self, ctx: CallContext) -> tuple:
        return (
            self.storage["val_bytes32"],
            self.storage["val_address"],
            self.storage["val_uint256"],
        )

    def set_and_get_values(self, ctx: CallContext, val_bytes32: bytes, val_address: str, val_uint256: int) -> tuple:
        self.storage.update({
            "val_bytes32": val_bytes32,
            "val_address": val_address,
            "val_uint256": val_uint256,
        })
        return self.get_values(ctx)


# Price source: (token_in, token_out, amount_in) -> amount_out
PriceSource = Callable[[str, str, int], int]


@dataclass(frozen=True)
class FixedRate:
    """Price source quoting token_in at numerator/denominator units of token_out."""
    numerator: int = 1
    denominator: int = 1

    def __call__(self, token_in: str, token_out: str, amount_in: int) -> int:
        return amount_in * self.numerator // self.denominator


class UniswapOracle(TargetProgram):
    """
    Two-token price oracle.

    updateAndConsult() quotes amountIn of one token in the other and stores
    the quote as the current state.
    """

    schema = UNISWAP_ORACLE

    def __init__(
        self,
        program_id: bytes,
        account_id: bytes,
        factory: str,
        weth: str,
        uni: str,
        price_source: Optional[PriceSource] = None,
    ):
        super().__init__(program_id, account_id)
        self.factory = to_checksum_address(factory)
        self.weth = to_checksum_address(weth)
        self.uni = to_checksum_address(uni)
        self.price_source = price_source or FixedRate()
        self.storage.update({
            "token0": self.weth,
            "amount0": 0,
            "token1": self.uni,
            "amount1": 0,
        })

    def get_values(self, ctx: CallContext) -> tuple:
        return (
            self.storage["token0"],
            self.storage["amount0"],
            self.storage["token1"],
            self.storage["amount1"],
        )

    def update_and_consult(self, ctx: CallContext, token: str, amount_in: int) -> int:
        if token == self.weth:
            other = self.uni
        elif token == self.uni:
            other = self.weth
        else:
            raise Revert("UniswapOracle: INVALID_TOKEN")

        amount_out = self.price_source(token, other, amount_in)
        if amount_out < 0 or amount_out >= 2 ** 256:
            raise Revert("UniswapOracle: INVALID_QUOTE")

        self.storage.update({
            "token0": token,
            "amount0": amount_in,
            "token1": other,
            "amount1": amount_out,
        })
        return amount_out
