"""
Relay client - the IO boundary for dispatching through Moebius.

execute(target, payload) submits `Moebius.execute(target, payload)` and
returns only a submission handle. The relay forwards the payload without
interpreting it, then emits a MoebiusData correlation record carrying the
target's accountId and its freshly packed state. The typed result is
never returned here; it is recovered through the correlator.

Error classification:
- TransientError/PermanentError: already classified, propagate
- Revert with the relay's pause reason -> RelayUnavailable
- Revert from the target (or a reverted receipt) -> TargetUnreachable
- Builtin TimeoutError / OSError (connection refused, DNS, ...) -> RelayUnavailable

The relay performs no retry; retry belongs to the keeper.
"""

import logging
from dataclasses import dataclass
from typing import Optional, Protocol, runtime_checkable

from eth_utils import to_checksum_address

from moebius.abi import CORRELATION_EVENT, MOEBIUS
from moebius.errors import (
    DecodeError,
    MoebiusError,
    RelayUnavailable,
    TargetUnreachable,
)
from moebius.ledger import LedgerClient, LogEntry, Receipt, Revert, TransactionRequest, TxHandle
from moebius.programs import PAUSED_REASON


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelationRecord:
    """
    MoebiusData(bytes32 _accountId, bytes _packedData) as emitted by the relay.

    The (correlation_key, packed_result) tuple is the stable wire shape
    consumed by the correlator and by external monitoring.
    """
    correlation_key: bytes
    packed_result: bytes
    block_number: int = 0
    tx_hash: str = ""
    log_index: int = 0

    @classmethod
    def from_log(cls, log: LogEntry) -> "CorrelationRecord":
        """
        Decode a relay log.

        Raises:
            DecodeError: If the log is not a well-formed MoebiusData record
        """
        if not log.topics or log.topics[0] != CORRELATION_EVENT.topic:
            raise DecodeError(f"Log {log.tx_hash}:{log.log_index} is not a {CORRELATION_EVENT.signature} record")
        key, packed = CORRELATION_EVENT.decode_data(log.data)
        return cls(
            correlation_key=key,
            packed_result=packed,
            block_number=log.block_number,
            tx_hash=log.tx_hash,
            log_index=log.log_index,
        )

    def encode(self) -> bytes:
        """Event data as emitted on the ledger."""
        return CORRELATION_EVENT.encode_data([self.correlation_key, self.packed_result])


@runtime_checkable
class Dispatchable(Protocol):
    """Anything that can forward an opaque payload to a target."""

    def execute(
        self,
        target: str,
        payload: bytes,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> TxHandle:
        ...


class Relay:
    """
    Client for a deployed Moebius relay.

    Usage:
        relay = Relay(ledger, relay_address)
        handle = relay.execute(target, SIMPLE_CONTRACT.encode("getValues"))
        receipt = relay.confirm(handle)
    """

    def __init__(self, ledger: LedgerClient, address: str, sender: Optional[str] = None):
        self.ledger = ledger
        self.address = to_checksum_address(address)
        self.sender = sender

    def execute(
        self,
        target: str,
        payload: bytes,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
    ) -> TxHandle:
        """
        Submit payload for forwarding to target.

        Args:
            target: Address of the target contract
            payload: Opaque calldata, forwarded exactly as given
            gas: Optional gas limit hint
            gas_price: Optional gas price hint (wei)

        Returns:
            TxHandle for the submitted transaction

        Raises:
            TargetUnreachable: The call was rejected at submission (e.g. gas estimation reverted)
            RelayUnavailable: The relay or its endpoint cannot be reached, or the relay is paused
        """
        tx = TransactionRequest(
            to=self.address,
            data=MOEBIUS.encode("execute", [target, bytes(payload)]),
            sender=self.sender,
            gas=gas,
            gas_price=gas_price,
        )
        handle = self._classified(lambda: self.ledger.submit_transaction(tx), target)
        logger.debug(f"Submitted {handle.tx_hash} via relay {self.address} -> {target}")
        return handle

    def confirm(self, handle: TxHandle, timeout: Optional[float] = None) -> Receipt:
        """
        Wait for inclusion and check the receipt.

        Args:
            handle: Handle returned by execute()
            timeout: Seconds to wait; None waits indefinitely

        Returns:
            Receipt of the successful transaction

        Raises:
            TargetUnreachable: The transaction reverted (no correlation record emitted)
            RelayUnavailable: The endpoint cannot be reached
            InclusionTimeout: Not included within timeout
        """
        receipt = self._classified(lambda: self.ledger.wait_for_inclusion(handle, timeout=timeout))
        if not receipt.succeeded:
            reason = receipt.revert_reason or "execution reverted"
            if reason == PAUSED_REASON:
                raise RelayUnavailable(f"Relay {self.address} is paused ({handle.tx_hash})")
            raise TargetUnreachable(f"Dispatch {handle.tx_hash} reverted: {reason}", tx_hash=handle.tx_hash)
        return receipt

    def dispatch(
        self,
        target: str,
        payload: bytes,
        gas: Optional[int] = None,
        gas_price: Optional[int] = None,
        timeout: Optional[float] = None,
    ) -> Receipt:
        """execute() followed by confirm()."""
        handle = self.execute(target, payload, gas=gas, gas_price=gas_price)
        return self.confirm(handle, timeout=timeout)

    def simulate(self, target: str, payload: bytes) -> bytes:
        """
        Run execute() as a read-only call and return the target's raw response.

        Nothing is mined and no correlation record is kept.
        """
        data = MOEBIUS.encode("execute", [target, bytes(payload)])
        raw = self._classified(lambda: self.ledger.call(self.address, data), target)
        (response,) = MOEBIUS.decode_output("execute", raw)
        return response

    def records(self, receipt: Receipt) -> list[CorrelationRecord]:
        """Correlation records emitted by this relay in a receipt."""
        return [
            CorrelationRecord.from_log(log)
            for log in receipt.logs
            if log.address == self.address and log.topics and log.topics[0] == CORRELATION_EVENT.topic
        ]

    def _classified(self, fn, target: Optional[str] = None):
        try:
            return fn()
        except MoebiusError:
            raise  # Already classified, propagate
        except Revert as e:
            if e.reason == PAUSED_REASON:
                raise RelayUnavailable(f"Relay {self.address} is paused") from e
            raise TargetUnreachable(f"Call to {target or 'target'} reverted: {e.reason or 'no reason'}") from e
        except TimeoutError as e:
            raise RelayUnavailable(f"Relay endpoint timed out: {e}") from e
        except OSError as e:
            raise RelayUnavailable(f"Relay endpoint unreachable: {e}") from e
