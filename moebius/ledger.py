"""
Ledger client interface - the single boundary to the network node.

This module defines the protocol any ledger client must implement, so that
the relay client, correlator and keeper are decoupled from the transport.

Implementations:
- InMemoryLedger: Deterministic automining ledger for tests and the sandbox
- Web3Ledger: Real implementation over web3.py with a local eth-account signer

Ledger-native failures are reported with plain exceptions:
- Revert: the call reverted (eth_call, gas estimation, or in-memory execution)
- ConnectionError / OSError: the endpoint could not be reached
- InclusionTimeout: the wait policy ran out before the transaction was mined

Classification into TargetUnreachable / RelayUnavailable happens in the
relay client, not here.
"""

import logging
import re
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Optional, Protocol, Sequence, runtime_checkable

from eth_utils import keccak, to_checksum_address

from moebius.abi import ContractSchema, get_schema
from moebius.errors import ConfigError, InclusionTimeout

if TYPE_CHECKING:
    from moebius.programs import Program


logger = logging.getLogger(__name__)

# Sender used by InMemoryLedger when a transaction does not name one
DEFAULT_SENDER = "0x00000000000000000000000000000000000000A1"


class Revert(Exception):
    """A call reverted inside the ledger. No state change was kept."""

    def __init__(self, reason: str = ""):
        self.reason = reason
        super().__init__(reason or "execution reverted")


@dataclass(frozen=True)
class TransactionRequest:
    """
    A state-changing call to submit.

    gas and gas_price are hints; None lets the ledger client decide.
    """
    to: str
    data: bytes
    sender: Optional[str] = None
    gas: Optional[int] = None
    gas_price: Optional[int] = None
    value: int = 0


@dataclass(frozen=True)
class TxHandle:
    """
    Handle for a submitted transaction.

    submitted_block is the chain height observed at submission; the
    transaction can only be included after it, so it is a safe lower
    bound for correlation queries.
    """
    tx_hash: str
    submitted_block: int


@dataclass(frozen=True)
class LogEntry:
    """A log emitted by a contract, as returned by the log index."""
    address: str
    topics: tuple[bytes, ...]
    data: bytes
    block_number: int
    tx_hash: str
    log_index: int = 0


@dataclass(frozen=True)
class Receipt:
    """Inclusion receipt for a transaction."""
    tx_hash: str
    block_number: int
    status: int
    logs: tuple[LogEntry, ...] = ()
    revert_reason: Optional[str] = None
    gas_used: int = 0

    @property
    def succeeded(self) -> bool:
        return self.status == 1


@runtime_checkable
class LedgerClient(Protocol):
    """
    Protocol for ledger access.

    Keeps node networking, consensus and signing outside of moebius.
    """

    def block_number(self) -> int:
        """Current chain height."""
        ...

    def call(self, to: str, data: bytes) -> bytes:
        """Execute a read-only call and return the raw return data."""
        ...

    def submit_transaction(self, tx: TransactionRequest) -> TxHandle:
        """Sign (if needed) and submit a transaction."""
        ...

    def wait_for_inclusion(self, handle: TxHandle, timeout: Optional[float] = None) -> Receipt:
        """Block until the transaction is included. None waits indefinitely."""
        ...

    def query_logs(
        self,
        address: str,
        from_block: int,
        to_block: Optional[int] = None,
        topics: Optional[Sequence[bytes]] = None,
    ) -> list[LogEntry]:
        """Query logs emitted by address in [from_block, to_block] (inclusive)."""
        ...

    def get_contract_handle(self, name: str, address: str) -> "ContractHandle":
        """Get a callable adapter for a deployed contract."""
        ...


class ContractHandle:
    """
    Callable adapter for a deployed contract.

    Reads go through LedgerClient.call and are decoded with the contract
    schema; writes are dispatched through the relay, not here.
    """

    def __init__(self, ledger: LedgerClient, schema: ContractSchema, address: str):
        self.ledger = ledger
        self.schema = schema
        self.address = to_checksum_address(address)

    def encode(self, entry_point: str, *args: Any) -> bytes:
        return self.schema.encode(entry_point, args)

    def call(self, entry_point: str, *args: Any) -> tuple:
        data = self.ledger.call(self.address, self.encode(entry_point, *args))
        return self.schema.decode_output(entry_point, data)

    def read(self, entry_point: str, *args: Any) -> Any:
        """Like call(), but unwraps single return values."""
        values = self.call(entry_point, *args)
        return values[0] if len(values) == 1 else values

    def __repr__(self) -> str:
        return f"ContractHandle({self.schema.name} at {self.address})"


# -----------------------------------------------------------------------------
# In-memory ledger
# -----------------------------------------------------------------------------

class CallContext:
    """
    Execution context for one (possibly nested) call inside InMemoryLedger.

    Programs use it to call other programs and to emit logs. Logs are
    buffered in the root context and only committed if the whole
    transaction succeeds.
    """

    def __init__(
        self,
        ledger: "InMemoryLedger",
        sender: str,
        address: str,
        block_number: int,
        logs: Optional[list] = None,
        depth: int = 0,
    ):
        self.ledger = ledger
        self.sender = sender
        self.address = address
        self.block_number = block_number
        self.logs = logs if logs is not None else []
        self.depth = depth

    def call(self, to: str, data: bytes) -> bytes:
        """Call another program with this program as the sender."""
        if self.depth >= InMemoryLedger.MAX_CALL_DEPTH:
            raise Revert("call depth exceeded")
        program = self.ledger.program_at(to)
        if program is None:
            raise Revert(f"call to non-contract {to}")
        child = CallContext(
            self.ledger,
            sender=self.address,
            address=program.address,
            block_number=self.block_number,
            logs=self.logs,
            depth=self.depth + 1,
        )
        return program.invoke(child, bytes(data))

    def emit(self, topics: Sequence[bytes], data: bytes) -> None:
        self.logs.append((self.address, tuple(topics), bytes(data)))


class InMemoryLedger:
    """
    Deterministic single-node ledger.

    - Every automined transaction gets its own block.
    - With automine=False transactions stay pending until mine(), which
      includes all of them in one block.
    - A reverted transaction restores all program storage and drops its logs.
      An exception raised by program code counts as a revert.
    - set_online(False) makes every RPC raise ConnectionError.
    """

    MAX_CALL_DEPTH = 32

    def __init__(self, automine: bool = True, default_sender: str = DEFAULT_SENDER):
        self.automine = automine
        self.default_sender = to_checksum_address(default_sender)
        self._programs: dict[str, "Program"] = {}
        self._logs: list[LogEntry] = []
        self._receipts: dict[str, Receipt] = {}
        self._pending: list[tuple[str, TransactionRequest]] = []
        self._height = 0
        self._nonce = 0
        self._online = True
        self._lock = threading.RLock()
        self._mined = threading.Condition(self._lock)

    # -------------------------------------------------------------------------
    # Test and sandbox controls
    # -------------------------------------------------------------------------

    def set_online(self, online: bool) -> None:
        self._online = online

    def deploy(self, program: "Program", sender: Optional[str] = None) -> str:
        """Deploy a program and return its address. Mines one block."""
        self._check_online()
        with self._lock:
            deployer = to_checksum_address(sender or self.default_sender)
            self._nonce += 1
            seed = bytes.fromhex(deployer[2:]) + self._nonce.to_bytes(32, "big")
            address = to_checksum_address(keccak(seed)[-20:])
            program.address = address
            program.deployer = deployer
            self._programs[address] = program
            self._height += 1
            self._mined.notify_all()
            logger.debug(f"Deployed {program.schema.name} at {address} (block {self._height})")
            return address

    def program_at(self, address: str) -> Optional["Program"]:
        try:
            return self._programs.get(to_checksum_address(address))
        except ValueError:
            return None

    def mine(self) -> int:
        """Include all pending transactions in a new block and return its number."""
        with self._lock:
            pending, self._pending = self._pending, []
            block = self._height + 1
            for tx_hash, tx in pending:
                self._apply(tx_hash, tx, block)
            self._height = block
            self._mined.notify_all()
            return block

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    # -------------------------------------------------------------------------
    # LedgerClient
    # -------------------------------------------------------------------------

    def block_number(self) -> int:
        self._check_online()
        return self._height

    def call(self, to: str, data: bytes) -> bytes:
        self._check_online()
        with self._lock:
            program = self.program_at(to)
            if program is None:
                raise Revert(f"call to non-contract {to}")
            snapshot = self._snapshot()
            ctx = CallContext(self, self.default_sender, program.address, self._height + 1)
            try:
                return self._execute(program, ctx, data)
            finally:
                self._restore(snapshot)

    def submit_transaction(self, tx: TransactionRequest) -> TxHandle:
        self._check_online()
        with self._lock:
            self._nonce += 1
            tx_hash = "0x" + keccak(
                self._nonce.to_bytes(32, "big") + bytes.fromhex(to_checksum_address(tx.to)[2:]) + bytes(tx.data)
            ).hex()
            handle = TxHandle(tx_hash=tx_hash, submitted_block=self._height)
            self._pending.append((tx_hash, tx))
            if self.automine:
                self.mine()
            return handle

    def wait_for_inclusion(self, handle: TxHandle, timeout: Optional[float] = None) -> Receipt:
        self._check_online()
        with self._mined:
            included = self._mined.wait_for(lambda: handle.tx_hash in self._receipts, timeout=timeout)
            if not included:
                raise InclusionTimeout(handle.tx_hash, timeout)
            return self._receipts[handle.tx_hash]

    def query_logs(
        self,
        address: str,
        from_block: int,
        to_block: Optional[int] = None,
        topics: Optional[Sequence[bytes]] = None,
    ) -> list[LogEntry]:
        self._check_online()
        address = to_checksum_address(address)
        upper = self._height if to_block is None else to_block
        matches = []
        for entry in self._logs:
            if entry.address != address:
                continue
            if not from_block <= entry.block_number <= upper:
                continue
            if topics and tuple(entry.topics[:len(topics)]) != tuple(topics):
                continue
            matches.append(entry)
        return matches

    def get_contract_handle(self, name: str, address: str) -> ContractHandle:
        return ContractHandle(self, get_schema(name), address)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_online(self) -> None:
        if not self._online:
            raise ConnectionError("ledger endpoint unreachable")

    def _snapshot(self) -> dict[str, dict]:
        return {addr: program.snapshot() for addr, program in self._programs.items()}

    def _restore(self, snapshot: dict[str, dict]) -> None:
        for addr, state in snapshot.items():
            self._programs[addr].restore(state)

    def _execute(self, program: "Program", ctx: CallContext, data: bytes) -> bytes:
        """Invoke a program at the root of a call. Any failure surfaces as Revert."""
        try:
            return program.invoke(ctx, bytes(data))
        except Revert:
            raise
        except Exception as e:
            logger.warning(f"{program.schema.name} at {program.address} failed: {type(e).__name__}: {e}")
            raise Revert(f"{type(e).__name__}: {e}") from e

    def _apply(self, tx_hash: str, tx: TransactionRequest, block: int) -> None:
        sender = to_checksum_address(tx.sender or self.default_sender)
        snapshot = self._snapshot()
        program = self.program_at(tx.to)
        try:
            if program is None:
                raise Revert(f"call to non-contract {tx.to}")
            ctx = CallContext(self, sender, program.address, block)
            self._execute(program, ctx, tx.data)
        except Revert as e:
            self._restore(snapshot)
            logger.debug(f"Transaction {tx_hash} reverted: {e.reason}")
            self._receipts[tx_hash] = Receipt(
                tx_hash=tx_hash, block_number=block, status=0, revert_reason=e.reason,
            )
            return

        start = len(self._logs)
        logs = tuple(
            LogEntry(
                address=address,
                topics=topics,
                data=data,
                block_number=block,
                tx_hash=tx_hash,
                log_index=start + i,
            )
            for i, (address, topics, data) in enumerate(ctx.logs)
        )
        self._logs.extend(logs)
        self._receipts[tx_hash] = Receipt(tx_hash=tx_hash, block_number=block, status=1, logs=logs)


# -----------------------------------------------------------------------------
# web3.py ledger
# -----------------------------------------------------------------------------

_REVERT_PREFIX = re.compile(r"^execution reverted:?\s*")


def _revert_reason(error: Exception) -> str:
    message = getattr(error, "message", None) or str(error)
    return _REVERT_PREFIX.sub("", message)


class Web3Ledger:
    """
    LedgerClient over a JSON-RPC endpoint using web3.py.

    Transactions are signed locally with an eth-account key. The key is
    consumed as configuration; moebius does not manage it.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: Optional[str] = None,
        chain_id: Optional[int] = None,
        request_timeout: float = 30.0,
        poll_interval: float = 1.0,
        web3: Any = None,
    ):
        from eth_account import Account
        from web3 import Web3

        self.rpc_url = rpc_url
        self._w3 = web3 or Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self._account = Account.from_key(private_key) if private_key else None
        self._chain_id = chain_id
        self._poll_interval = poll_interval

    @property
    def sender(self) -> Optional[str]:
        return self._account.address if self._account else None

    def block_number(self) -> int:
        return int(self._w3.eth.block_number)

    def call(self, to: str, data: bytes) -> bytes:
        from web3.exceptions import ContractLogicError

        try:
            return bytes(self._w3.eth.call({"to": to_checksum_address(to), "data": bytes(data)}))
        except ContractLogicError as e:
            raise Revert(_revert_reason(e)) from e

    def submit_transaction(self, tx: TransactionRequest) -> TxHandle:
        from web3.exceptions import ContractLogicError

        if self._account is None:
            raise ConfigError("A signing key is required to submit transactions")

        sender = self._account.address
        params: dict[str, Any] = {
            "from": sender,
            "to": to_checksum_address(tx.to),
            "data": bytes(tx.data),
            "value": tx.value,
            "nonce": self._w3.eth.get_transaction_count(sender, "pending"),
            "chainId": self._chain_id if self._chain_id is not None else self._w3.eth.chain_id,
            "gasPrice": tx.gas_price if tx.gas_price is not None else self._w3.eth.gas_price,
        }
        if tx.gas is not None:
            params["gas"] = tx.gas
        else:
            try:
                params["gas"] = self._w3.eth.estimate_gas(params)
            except ContractLogicError as e:
                raise Revert(_revert_reason(e)) from e

        signed = self._account.sign_transaction(params)
        submitted_block = self.block_number()
        tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)
        return TxHandle(tx_hash=self._w3.to_hex(tx_hash), submitted_block=submitted_block)

    def wait_for_inclusion(self, handle: TxHandle, timeout: Optional[float] = None) -> Receipt:
        from web3.exceptions import TimeExhausted

        if timeout is None:
            # No wait policy: keep polling until the node reports a receipt
            while True:
                try:
                    raw = self._w3.eth.wait_for_transaction_receipt(
                        handle.tx_hash, timeout=120, poll_latency=self._poll_interval,
                    )
                    break
                except TimeExhausted:
                    logger.debug(f"Still waiting for {handle.tx_hash}")
        else:
            try:
                raw = self._w3.eth.wait_for_transaction_receipt(
                    handle.tx_hash, timeout=timeout, poll_latency=self._poll_interval,
                )
            except TimeExhausted as e:
                raise InclusionTimeout(handle.tx_hash, timeout) from e

        block_number = int(raw["blockNumber"])
        status = int(raw["status"])
        return Receipt(
            tx_hash=handle.tx_hash,
            block_number=block_number,
            status=status,
            logs=tuple(self._to_log_entry(log) for log in raw["logs"]),
            revert_reason=self._replay_revert_reason(handle.tx_hash, block_number) if status == 0 else None,
            gas_used=int(raw.get("gasUsed", 0)),
        )

    def _replay_revert_reason(self, tx_hash: str, block_number: int) -> Optional[str]:
        """Re-run a failed transaction as eth_call on its parent block to recover the revert reason."""
        from web3.exceptions import ContractLogicError

        tx = self._w3.eth.get_transaction(tx_hash)
        try:
            self._w3.eth.call(
                {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx.get("value", 0)},
                block_number - 1,
            )
        except ContractLogicError as e:
            return _revert_reason(e)
        # Replay succeeded: the failure was not a revert (e.g. out of gas)
        return None

    def query_logs(
        self,
        address: str,
        from_block: int,
        to_block: Optional[int] = None,
        topics: Optional[Sequence[bytes]] = None,
    ) -> list[LogEntry]:
        params: dict[str, Any] = {
            "address": to_checksum_address(address),
            "fromBlock": from_block,
            "toBlock": to_block if to_block is not None else "latest",
        }
        if topics:
            params["topics"] = [self._w3.to_hex(topic) for topic in topics]
        return [self._to_log_entry(log) for log in self._w3.eth.get_logs(params)]

    def get_contract_handle(self, name: str, address: str) -> ContractHandle:
        return ContractHandle(self, get_schema(name), address)

    def _to_log_entry(self, log: Any) -> LogEntry:
        return LogEntry(
            address=to_checksum_address(log["address"]),
            topics=tuple(bytes(topic) for topic in log["topics"]),
            data=bytes(log["data"]),
            block_number=int(log["blockNumber"]),
            tx_hash=self._w3.to_hex(log["transactionHash"]),
            log_index=int(log.get("logIndex", 0)),
        )
