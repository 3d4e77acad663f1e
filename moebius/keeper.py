"""
Keeper - unattended periodic dispatch through the relay.

Each Keeper drives one KeeperTask through a two-state loop:

    IDLE --(build, encode, execute)--> IN_FLIGHT --(included / failed)--> IDLE

Cycle:
1. Build the argument list (may read external state)
2. Encode the entry point call and dispatch it through the relay
3. Wait for inclusion (bounded only if inclusion_timeout is set)
4. Optionally confirm through the correlator
5. On any failure: log and wait retry_delay
6. On success: wait period

A single cycle's failure never escapes run(); the loop only stops when
stop() is called. Stopping is honoured between cycles and during the
inter-cycle wait, not while a transaction is in flight.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Optional, Sequence

from moebius.abi import ContractSchema
from moebius.correlator import CorrelatedResult, ResultCorrelator
from moebius.errors import DecodeError, MoebiusError, PermanentError
from moebius.ledger import Receipt
from moebius.relay import Dispatchable


logger = logging.getLogger(__name__)


class KeeperState(str, Enum):
    """Keeper loop state."""
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


class ConfirmationPolicy(str, Enum):
    """How far a cycle goes before it counts as successful."""
    NONE = "none"                # submitted
    INCLUSION = "inclusion"      # included with a successful receipt
    CORRELATION = "correlation"  # included and the correlation record decoded


@dataclass
class KeeperTask:
    """
    A periodic dispatch.

    Attributes:
        name: Task name used in logs
        relay_address: Address of the Moebius relay
        target_address: Address of the target contract
        schema: Target contract schema
        entry_point: Entry point to call each cycle
        argument_builder: Zero-argument callable returning the argument list
        period: Seconds to wait after a successful cycle
        retry_delay: Seconds to wait after a failed cycle (defaults to period)
        confirmation: Confirmation policy
        inclusion_timeout: Seconds to wait for inclusion; None waits indefinitely
        correlation_key: Key to confirm against; read from the target when None
        gas: Optional gas limit hint
        gas_price: Optional gas price hint (wei)
    """
    name: str
    relay_address: str
    target_address: str
    schema: ContractSchema
    entry_point: str
    argument_builder: Callable[[], Sequence[Any]]
    period: float
    retry_delay: Optional[float] = None
    confirmation: ConfirmationPolicy = ConfirmationPolicy.INCLUSION
    inclusion_timeout: Optional[float] = None
    correlation_key: Optional[bytes] = None
    gas: Optional[int] = None
    gas_price: Optional[int] = None

    def __post_init__(self):
        if self.period <= 0:
            raise ValueError(f"Keeper {self.name}: period must be positive")
        if self.retry_delay is None:
            self.retry_delay = self.period
        if self.retry_delay < 0:
            raise ValueError(f"Keeper {self.name}: retry_delay cannot be negative")
        self.confirmation = ConfirmationPolicy(self.confirmation)
        # Fail fast on a misconfigured entry point
        self.schema.entry_point(self.entry_point)


@dataclass(frozen=True)
class CycleOutcome:
    """
    Result of one keeper cycle.

    Attributes:
        cycle: 1-based cycle number
        success: Whether the cycle met its confirmation policy
        started_at: When the cycle started
        completed_at: When the cycle finished (before the wait)
        tx_hash: Submitted transaction, if submission got that far
        receipt: Inclusion receipt, if waited for
        result: Correlated result, if confirmed by correlation
        error: The exception that failed the cycle
    """
    cycle: int
    success: bool
    started_at: datetime
    completed_at: datetime
    tx_hash: Optional[str] = None
    receipt: Optional[Receipt] = None
    result: Optional[CorrelatedResult] = None
    error: Optional[BaseException] = None

    @property
    def duration_ms(self) -> int:
        return int((self.completed_at - self.started_at).total_seconds() * 1000)


def _utcnow() -> datetime:
    """Return current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class Keeper:
    """
    Runs one KeeperTask until stopped.

    Usage:
        keeper = Keeper(task, Relay(ledger, relay_address), correlator)
        keeper.run()          # blocks; keeper.stop() from another thread

    Args:
        task: The task to run
        relay: Dispatch point; a Relay also provides inclusion waits
        correlator: Required for ConfirmationPolicy.CORRELATION
        sleep: Wait function taking seconds and returning True if the keeper
            was stopped during the wait. Defaults to an interruptible wait.
    """

    def __init__(
        self,
        task: KeeperTask,
        relay: Dispatchable,
        correlator: Optional[ResultCorrelator] = None,
        sleep: Optional[Callable[[float], Any]] = None,
    ):
        if task.confirmation == ConfirmationPolicy.CORRELATION and correlator is None:
            raise ValueError(f"Keeper {task.name}: correlation confirmation needs a correlator")
        self.task = task
        self.relay = relay
        self.correlator = correlator
        self._stop = threading.Event()
        self._sleep = sleep or self._stop.wait
        self.state = KeeperState.IDLE
        self.cycles = 0
        self.failures = 0
        self.last_outcome: Optional[CycleOutcome] = None

    def stop(self) -> None:
        """Request the loop to stop after the current cycle or wait."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run(self, max_cycles: Optional[int] = None) -> None:
        """
        Run cycles until stop() is called (or max_cycles have run).

        Never raises for a failed cycle.
        """
        logger.info(
            f"Keeper {self.task.name} started: {self.task.entry_point} on {self.task.target_address} "
            f"every {self.task.period}s"
        )
        while not self.stopped:
            outcome = self.run_cycle()
            if max_cycles is not None and self.cycles >= max_cycles:
                break
            delay = self.task.period if outcome.success else self.task.retry_delay
            logger.debug(f"Keeper {self.task.name} sleeping {delay}s")
            if self._sleep(delay):
                break
        logger.info(f"Keeper {self.task.name} stopped after {self.cycles} cycles ({self.failures} failed)")

    def run_cycle(self) -> CycleOutcome:
        """Run a single cycle and return its outcome. Never raises for cycle failures."""
        self.cycles += 1
        started_at = _utcnow()
        tx_hash = None
        receipt = None
        result = None
        try:
            args = list(self.task.argument_builder())
            payload = self.task.schema.encode(self.task.entry_point, args)

            self.state = KeeperState.IN_FLIGHT
            handle = self.relay.execute(
                self.task.target_address,
                payload,
                gas=self.task.gas,
                gas_price=self.task.gas_price,
            )
            tx_hash = handle.tx_hash
            logger.info(f"{self.task.name}: {self.task.entry_point} submitted {tx_hash}")

            if self.task.confirmation != ConfirmationPolicy.NONE:
                receipt = self._wait_for_inclusion(handle)
                logger.info(f"{self.task.name}: {tx_hash} included in block {receipt.block_number}")

            if self.task.confirmation == ConfirmationPolicy.CORRELATION:
                result = self.correlator.fetch(
                    self.task.relay_address,
                    self._correlation_key(),
                    from_block=receipt.block_number,
                    to_block=receipt.block_number,
                    tx_hash=tx_hash,
                )
                logger.info(f"{self.task.name}: correlated state {result.values}")
        except DecodeError as e:
            # Relay/target and correlator disagree on the schema: a deployment bug
            logger.critical(f"{self.task.name}: correlation schema mismatch: {e}", exc_info=True)
            return self._record(started_at, False, tx_hash, receipt, None, e)
        except PermanentError as e:
            logger.error(f"{self.task.name}: cycle {self.cycles} failed permanently ({type(e).__name__}): {e}")
            return self._record(started_at, False, tx_hash, receipt, None, e)
        except MoebiusError as e:
            logger.warning(f"{self.task.name}: cycle {self.cycles} failed ({type(e).__name__}): {e}")
            return self._record(started_at, False, tx_hash, receipt, None, e)
        except Exception as e:
            logger.exception(f"{self.task.name}: cycle {self.cycles} failed unexpectedly")
            return self._record(started_at, False, tx_hash, receipt, None, e)
        finally:
            self.state = KeeperState.IDLE

        return self._record(started_at, True, tx_hash, receipt, result, None)

    def _wait_for_inclusion(self, handle) -> Receipt:
        confirm = getattr(self.relay, "confirm", None)
        if confirm is None:
            raise ValueError(f"Keeper {self.task.name}: relay cannot wait for inclusion")
        return confirm(handle, timeout=self.task.inclusion_timeout)

    def _correlation_key(self) -> bytes:
        if self.task.correlation_key is not None:
            return self.task.correlation_key
        handle = self.correlator.ledger.get_contract_handle(self.task.schema.name, self.task.target_address)
        return handle.read("accountId")

    def _record(self, started_at, success, tx_hash, receipt, result, error) -> CycleOutcome:
        if not success:
            self.failures += 1
        outcome = CycleOutcome(
            cycle=self.cycles,
            success=success,
            started_at=started_at,
            completed_at=_utcnow(),
            tx_hash=tx_hash,
            receipt=receipt,
            result=result,
            error=error,
        )
        self.last_outcome = outcome
        return outcome


def run_keepers(keepers: Sequence[Keeper], poll_interval: float = 0.5) -> None:
    """
    Run several keepers concurrently, one thread each, until all stop.

    KeyboardInterrupt stops every keeper and waits for them to finish
    their current cycle.
    """
    if not keepers:
        return
    with ThreadPoolExecutor(max_workers=len(keepers), thread_name_prefix="keeper") as pool:
        futures = [pool.submit(keeper.run) for keeper in keepers]
        try:
            while not all(f.done() for f in futures):
                time.sleep(poll_interval)
        except KeyboardInterrupt:
            logger.info("Interrupted, stopping keepers")
            for keeper in keepers:
                keeper.stop()
        for future in futures:
            future.result()
