"""
Result correlator - recover dispatch results from the relay's log index.

The relay never returns typed results to the submitter. Instead each
successful dispatch leaves a MoebiusData(accountId, packedData) record.
The correlator scans the relay's logs from a block height (normally the
submission height), keeps records whose key matches, and decodes the
packed data with the target's state schema.

Nothing is cached: every fetch is a fresh range query against the ledger.

Expected outcomes:
- NotFound: no match yet (not included, or the target reverted). Poll-able.
- DecodeError: record or packed data disagrees with the schema. Fatal.
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Sequence

from eth_utils import to_checksum_address

from moebius.abi import CORRELATION_EVENT, decode_values
from moebius.errors import NotFound
from moebius.ledger import LedgerClient
from moebius.relay import CorrelationRecord


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CorrelatedResult:
    """A matched correlation record and its decoded values."""
    record: CorrelationRecord
    values: tuple

    @property
    def block_number(self) -> int:
        return self.record.block_number

    @property
    def tx_hash(self) -> str:
        return self.record.tx_hash


class ResultCorrelator:
    """
    Fetch and decode correlation records for one state schema.

    Args:
        ledger: Ledger client used for log queries
        result_types: ABI types of the packed state, in field order
            (e.g. ("bytes32", "address", "uint256") for SimpleContract)
    """

    def __init__(self, ledger: LedgerClient, result_types: Sequence[str]):
        self.ledger = ledger
        self.result_types = tuple(result_types)

    def records(
        self,
        relay_address: str,
        from_block: int,
        to_block: Optional[int] = None,
    ) -> list[CorrelationRecord]:
        """All correlation records emitted by the relay in the block range."""
        logs = self.ledger.query_logs(
            to_checksum_address(relay_address),
            from_block,
            to_block,
            topics=[CORRELATION_EVENT.topic],
        )
        return [CorrelationRecord.from_log(log) for log in logs]

    def fetch_all(
        self,
        relay_address: str,
        correlation_key: bytes,
        from_block: int,
        to_block: Optional[int] = None,
        tx_hash: Optional[str] = None,
    ) -> list[CorrelatedResult]:
        """
        Every matching record in the range, oldest first.

        With tx_hash, only records emitted by that transaction match.

        Raises:
            DecodeError: If a matching record does not decode with result_types
        """
        key = bytes(correlation_key)
        results = []
        for record in self.records(relay_address, from_block, to_block):
            if record.correlation_key != key:
                continue
            if tx_hash is not None and record.tx_hash.lower() != tx_hash.lower():
                continue
            values = decode_values(
                self.result_types,
                record.packed_result,
                context=f"packed result of {record.tx_hash}",
            )
            results.append(CorrelatedResult(record=record, values=values))
        return results

    def fetch(
        self,
        relay_address: str,
        correlation_key: bytes,
        from_block: int,
        to_block: Optional[int] = None,
        latest: bool = False,
        tx_hash: Optional[str] = None,
    ) -> CorrelatedResult:
        """
        First (or, with latest=True, most recent) matching record.

        Raises:
            NotFound: If nothing matches in [from_block, to_block]
            DecodeError: If the matching record does not decode with result_types
        """
        results = self.fetch_all(relay_address, correlation_key, from_block, to_block, tx_hash=tx_hash)
        if not results:
            raise NotFound(bytes(correlation_key), from_block, to_block)
        if len(results) > 1:
            logger.debug(
                f"{len(results)} records for 0x{bytes(correlation_key).hex()} "
                f"in blocks {from_block}..{to_block if to_block is not None else 'latest'}"
            )
        return results[-1] if latest else results[0]

    def poll(
        self,
        relay_address: str,
        correlation_key: bytes,
        from_block: int,
        attempts: int = 10,
        interval: float = 1.0,
        sleep=time.sleep,
    ) -> CorrelatedResult:
        """
        Re-poll fetch() on NotFound with a fixed interval.

        Raises:
            NotFound: If every attempt came back empty
            DecodeError: Immediately, without further attempts
        """
        for attempt in range(1, attempts + 1):
            try:
                return self.fetch(relay_address, correlation_key, from_block)
            except NotFound:
                if attempt == attempts:
                    raise
                logger.debug(f"Correlation attempt {attempt}/{attempts} found nothing, retrying in {interval}s")
                sleep(interval)
        raise NotFound(bytes(correlation_key), from_block)


class CorrelationWatcher:
    """
    Tail correlation records emitted by a relay.

    Each record is yielded once, in ledger order. The cursor advances past
    the last block seen, so a restarted watcher can resume from `cursor`.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        relay_address: str,
        from_block: int = 0,
        poll_interval: float = 1.0,
        stop_event: Optional[threading.Event] = None,
    ):
        self.ledger = ledger
        self.relay_address = to_checksum_address(relay_address)
        self.cursor = from_block
        self.poll_interval = poll_interval
        self._stop = stop_event or threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def poll_once(self) -> list[CorrelationRecord]:
        """Fetch records between the cursor and the current head."""
        head = self.ledger.block_number()
        if head < self.cursor:
            return []
        logs = self.ledger.query_logs(
            self.relay_address, self.cursor, head, topics=[CORRELATION_EVENT.topic],
        )
        self.cursor = head + 1
        return [CorrelationRecord.from_log(log) for log in logs]

    def __iter__(self) -> Iterator[CorrelationRecord]:
        while not self._stop.is_set():
            for record in self.poll_once():
                yield record
            self._stop.wait(self.poll_interval)


def describe(record: CorrelationRecord, values: Optional[tuple] = None) -> dict[str, Any]:
    """JSON-friendly view of a record (used by the CLI)."""
    data: dict[str, Any] = {
        "block_number": record.block_number,
        "tx_hash": record.tx_hash,
        "correlation_key": "0x" + record.correlation_key.hex(),
        "packed_result": "0x" + record.packed_result.hex(),
    }
    if values is not None:
        data["values"] = [
            "0x" + v.hex() if isinstance(v, (bytes, bytearray)) else v for v in values
        ]
    return data
