"""
Error classes for moebius dispatch and correlation.

These error types enable retry classification at the keeper boundary:
- TransientError: Safe to retry (node unreachable, reverted dispatch, record not yet indexed)
- PermanentError: Do not retry (bad identifiers, bad arguments, schema mismatch)

Boundaries (relay client, ledger adapters) classify raw exceptions into
these types. The keeper catches at the cycle boundary, logs, and retries
on its fixed schedule.

Error handling contract:
- Results are success-only values
- Errors are exceptions, not values
"""


class MoebiusError(Exception):
    """Base exception for moebius."""
    pass


class TransientError(MoebiusError):
    """
    Transient error - safe to retry.

    Examples:
    - RPC endpoint unreachable
    - Relay paused
    - Target reverted the forwarded call
    - Transaction not included in time
    - Correlation record not indexed yet
    """
    pass


class PermanentError(MoebiusError):
    """
    Permanent error - do not retry.

    Examples:
    - Malformed base58 identifier
    - Unknown entry point
    - Argument that cannot be encoded as its declared type
    - Correlation record that does not match the expected schema
    """
    pass


# -----------------------------------------------------------------------------
# Encoding errors: local, deterministic, fixed by configuration
# -----------------------------------------------------------------------------

class EncodingError(PermanentError):
    """Base class for identifier and calldata encoding failures."""
    pass


class MalformedIdentifier(EncodingError):
    """Foreign identifier is not valid base58 or has the wrong width."""
    pass


class UnknownEntryPoint(EncodingError):
    """Entry point (or event) is not part of the contract schema."""

    def __init__(self, contract: str, name: str):
        self.contract = contract
        self.name = name
        super().__init__(f"{contract} has no entry point '{name}'")


class ArgumentTypeMismatch(EncodingError):
    """Argument value cannot be encoded as its declared ABI type."""

    def __init__(self, entry_point: str, index: int, abi_type: str, value, reason: str = ""):
        self.entry_point = entry_point
        self.index = index
        self.abi_type = abi_type
        self.value = value
        detail = f": {reason}" if reason else ""
        super().__init__(
            f"{entry_point} argument {index} is not a valid {abi_type} ({value!r}){detail}"
        )


# -----------------------------------------------------------------------------
# Dispatch errors: retried on the keeper schedule
# -----------------------------------------------------------------------------

class DispatchError(TransientError):
    """Base class for failures while forwarding a call through the relay."""
    pass


class TargetUnreachable(DispatchError):
    """The forwarded call reverted or failed inside the ledger."""

    def __init__(self, message: str, tx_hash: str | None = None):
        self.tx_hash = tx_hash
        super().__init__(message)


class RelayUnavailable(DispatchError):
    """The relay (or the node in front of it) cannot be reached or is paused."""
    pass


class InclusionTimeout(DispatchError):
    """The submitted transaction was not included within the wait policy."""

    def __init__(self, tx_hash: str, timeout: float):
        self.tx_hash = tx_hash
        self.timeout = timeout
        super().__init__(f"Transaction {tx_hash} not included after {timeout}s")


# -----------------------------------------------------------------------------
# Correlation errors
# -----------------------------------------------------------------------------

class NotFound(TransientError):
    """No correlation record matched the key in the queried block range."""

    def __init__(self, correlation_key: bytes, from_block: int, to_block: int | None = None):
        self.correlation_key = correlation_key
        self.from_block = from_block
        self.to_block = to_block
        upper = "latest" if to_block is None else str(to_block)
        super().__init__(
            f"No correlation record for 0x{correlation_key.hex()} in blocks {from_block}..{upper}"
        )


class DecodeError(PermanentError):
    """A correlation record does not match the expected schema."""
    pass


class ConfigError(PermanentError):
    """Configuration validation error."""
    pass
