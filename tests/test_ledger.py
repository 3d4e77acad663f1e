"""Tests for the in-memory ledger and the Web3 ledger adapter.

Tests cover:
- Automining and block heights
- Revert atomicity (storage restored, logs dropped)
- Manual mining and inclusion timeouts
- Offline endpoint
- Web3Ledger receipt/log translation against a mocked web3
"""

from unittest.mock import MagicMock

import pytest

from conftest import (
    ACCOUNT_ID, FACTORY, ORACLE_ACCOUNT_ID, PROGRAM_ID, UNI, VALUE_ADDRESS, VALUE_BYTES32, VALUE_UINT, WETH,
)
from moebius.abi import MOEBIUS, SIMPLE_CONTRACT, UNISWAP_ORACLE
from moebius.errors import ConfigError, InclusionTimeout, RelayUnavailable, TargetUnreachable
from moebius.ledger import InMemoryLedger, Revert, TransactionRequest, TxHandle, Web3Ledger
from moebius.programs import RelayProgram, SimpleContract, UniswapOracle
from moebius.relay import Relay


class TestInMemoryLedger:
    """Tests for InMemoryLedger."""

    def test_deploy_mines_block(self, ledger):
        assert ledger.block_number() == 0
        address = ledger.deploy(RelayProgram())
        assert ledger.block_number() == 1
        assert ledger.program_at(address) is not None

    def test_each_transaction_gets_a_block(self, ledger, simple_contract):
        start = ledger.block_number()
        for _ in range(3):
            ledger.submit_transaction(TransactionRequest(
                to=simple_contract.address, data=SIMPLE_CONTRACT.encode("getValues"),
            ))
        assert ledger.block_number() == start + 3

    def test_read_call(self, ledger, simple_contract):
        handle = ledger.get_contract_handle("SimpleContract", simple_contract.address)
        assert handle.read("accountId") == ACCOUNT_ID
        assert handle.call("getValues") == (VALUE_BYTES32, VALUE_ADDRESS, VALUE_UINT)

    def test_read_call_does_not_mutate(self, ledger, simple_contract):
        data = SIMPLE_CONTRACT.encode("setAndGetValues", [b"\x09" * 32, VALUE_ADDRESS, 1])
        ledger.call(simple_contract.address, data)
        assert simple_contract.storage["val_uint256"] == VALUE_UINT

    def test_call_to_non_contract_reverts(self, ledger):
        with pytest.raises(Revert):
            ledger.call(VALUE_ADDRESS, b"\x00" * 4)

    def test_revert_restores_storage(self, ledger, simple_contract):
        """A reverted transaction keeps no state and no logs."""
        relay_address = ledger.deploy(RelayProgram())
        relay = ledger.program_at(relay_address)
        relay.storage["paused"] = True
        before = dict(simple_contract.storage)

        handle = ledger.submit_transaction(TransactionRequest(
            to=relay_address,
            data=MOEBIUS.encode("execute", [
                simple_contract.address,
                SIMPLE_CONTRACT.encode("setAndGetValues", [b"\x09" * 32, VALUE_ADDRESS, 1]),
            ]),
        ))
        receipt = ledger.wait_for_inclusion(handle)

        assert receipt.status == 0
        assert receipt.revert_reason == "Moebius: paused"
        assert receipt.logs == ()
        assert simple_contract.storage == before
        assert ledger.query_logs(relay_address, 0) == []

    def test_revert_after_state_change(self, ledger, relay_address):
        """Storage written by the target is rolled back when the relay reverts later."""

        class KeylessContract(SimpleContract):
            def account_id(self, ctx):
                raise Revert("no key")

        target = KeylessContract(ACCOUNT_ID, ACCOUNT_ID, VALUE_BYTES32, VALUE_ADDRESS, VALUE_UINT)
        ledger.deploy(target)

        handle = ledger.submit_transaction(TransactionRequest(
            to=relay_address,
            data=MOEBIUS.encode("execute", [
                target.address,
                SIMPLE_CONTRACT.encode("setAndGetValues", [b"\x09" * 32, VALUE_ADDRESS, 1]),
            ]),
        ))

        assert ledger.wait_for_inclusion(handle).revert_reason == "no key"
        assert target.storage["val_uint256"] == VALUE_UINT
        assert target.storage["val_bytes32"] == VALUE_BYTES32

    def test_unknown_selector_reverts(self, ledger, simple_contract):
        handle = ledger.submit_transaction(TransactionRequest(to=simple_contract.address, data=b"\xde\xad\xbe\xef"))
        receipt = ledger.wait_for_inclusion(handle)
        assert not receipt.succeeded
        assert "unknown selector" in receipt.revert_reason

    def test_program_error_reverts(self, ledger, relay):
        """An exception raised by program code rolls back like a revert."""
        oracle = UniswapOracle(
            PROGRAM_ID, ORACLE_ACCOUNT_ID, FACTORY, WETH, UNI,
            price_source=lambda token, other, amount: amount / 2,
        )
        ledger.deploy(oracle)
        before = dict(oracle.storage)
        height = ledger.block_number()

        with pytest.raises(TargetUnreachable, match="ArgumentTypeMismatch"):
            relay.dispatch(oracle.address, UNISWAP_ORACLE.encode("updateAndConsult", [UNI, 10]))

        assert oracle.storage == before
        assert ledger.block_number() == height + 1
        assert ledger.query_logs(relay.address, 0) == []

    def test_program_error_does_not_drop_batch(self):
        ledger = InMemoryLedger(automine=False)
        broken = UniswapOracle(
            PROGRAM_ID, ORACLE_ACCOUNT_ID, FACTORY, WETH, UNI,
            price_source=lambda token, other, amount: amount / 2,
        )
        ledger.deploy(broken)
        address = ledger.deploy(SimpleContract(ACCOUNT_ID, ACCOUNT_ID, VALUE_BYTES32, VALUE_ADDRESS, VALUE_UINT))
        failing = ledger.submit_transaction(TransactionRequest(
            to=broken.address, data=UNISWAP_ORACLE.encode("updateAndConsult", [UNI, 10]),
        ))
        following = ledger.submit_transaction(TransactionRequest(
            to=address, data=SIMPLE_CONTRACT.encode("setAndGetValues", [b"\x09" * 32, VALUE_ADDRESS, 1]),
        ))

        block = ledger.mine()

        assert ledger.wait_for_inclusion(failing, timeout=1).status == 0
        assert ledger.wait_for_inclusion(following, timeout=1).succeeded
        assert ledger.wait_for_inclusion(following, timeout=1).block_number == block
        assert ledger.program_at(address).storage["val_uint256"] == 1

    def test_program_error_in_read_call(self, ledger):
        oracle = UniswapOracle(
            PROGRAM_ID, ORACLE_ACCOUNT_ID, FACTORY, WETH, UNI,
            price_source=lambda token, other, amount: amount / 2,
        )
        ledger.deploy(oracle)
        with pytest.raises(Revert):
            ledger.call(oracle.address, UNISWAP_ORACLE.encode("updateAndConsult", [UNI, 10]))
        assert oracle.storage["amount0"] == 0

    def test_manual_mining(self):
        ledger = InMemoryLedger(automine=False)
        address = ledger.deploy(SimpleContract(ACCOUNT_ID, ACCOUNT_ID, VALUE_BYTES32, VALUE_ADDRESS, VALUE_UINT))
        first = ledger.submit_transaction(TransactionRequest(to=address, data=SIMPLE_CONTRACT.encode("getValues")))
        second = ledger.submit_transaction(TransactionRequest(to=address, data=SIMPLE_CONTRACT.encode("getValues")))
        assert ledger.pending_count == 2
        assert first.submitted_block == second.submitted_block == 1

        block = ledger.mine()

        assert block == 2
        assert ledger.wait_for_inclusion(first).block_number == 2
        assert ledger.wait_for_inclusion(second).block_number == 2

    def test_inclusion_timeout(self):
        ledger = InMemoryLedger(automine=False)
        address = ledger.deploy(RelayProgram())
        handle = ledger.submit_transaction(TransactionRequest(to=address, data=MOEBIUS.encode("paused")))
        with pytest.raises(InclusionTimeout) as exc_info:
            ledger.wait_for_inclusion(handle, timeout=0.01)
        assert exc_info.value.tx_hash == handle.tx_hash

    def test_offline(self, ledger):
        ledger.set_online(False)
        with pytest.raises(ConnectionError):
            ledger.block_number()
        with pytest.raises(ConnectionError):
            ledger.query_logs(VALUE_ADDRESS, 0)
        ledger.set_online(True)
        assert ledger.block_number() == 0

    def test_query_logs_range_is_inclusive(self, ledger, relay, simple_contract):
        receipt = relay.dispatch(simple_contract.address, SIMPLE_CONTRACT.encode("getValues"))
        block = receipt.block_number
        assert len(ledger.query_logs(relay.address, block, block)) == 1
        assert ledger.query_logs(relay.address, block + 1) == []
        assert ledger.query_logs(relay.address, 0, block - 1) == []


class TestWeb3Ledger:
    """Tests for Web3Ledger against a mocked web3 instance."""

    @pytest.fixture
    def w3(self):
        w3 = MagicMock()
        w3.to_hex.side_effect = lambda value: "0x" + bytes(value).hex()
        w3.eth.block_number = 100
        return w3

    def test_submit_requires_key(self, w3):
        ledger = Web3Ledger("http://localhost:8545", web3=w3)
        with pytest.raises(ConfigError):
            ledger.submit_transaction(TransactionRequest(to=VALUE_ADDRESS, data=b""))

    def test_receipt_translation(self, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {
            "blockNumber": 101,
            "status": 1,
            "gasUsed": 21000,
            "logs": [{
                "address": VALUE_ADDRESS.lower(),
                "topics": [b"\x01" * 32],
                "data": b"\x02",
                "blockNumber": 101,
                "transactionHash": b"\x03" * 32,
                "logIndex": 0,
            }],
        }
        ledger = Web3Ledger("http://localhost:8545", web3=w3)
        receipt = ledger.wait_for_inclusion(TxHandle("0x" + "03" * 32, 100), timeout=5)

        assert receipt.succeeded
        assert receipt.block_number == 101
        assert receipt.logs[0].address == VALUE_ADDRESS
        assert receipt.logs[0].tx_hash == "0x" + "03" * 32

    def test_failed_receipt_recovers_revert_reason(self, w3):
        """A status-0 receipt is replayed on its parent block to recover the reason."""
        from web3.exceptions import ContractLogicError

        w3.eth.wait_for_transaction_receipt.return_value = {"blockNumber": 101, "status": 0, "logs": []}
        w3.eth.get_transaction.return_value = {"from": VALUE_ADDRESS, "to": VALUE_ADDRESS, "input": b"\x01", "value": 0}
        w3.eth.call.side_effect = ContractLogicError("execution reverted: Moebius: paused")
        ledger = Web3Ledger("http://localhost:8545", web3=w3)

        receipt = ledger.wait_for_inclusion(TxHandle("0x" + "03" * 32, 100), timeout=5)

        assert not receipt.succeeded
        assert receipt.revert_reason == "Moebius: paused"
        assert w3.eth.call.call_args[0][1] == 100

    def test_failed_receipt_relay_unavailable_when_paused(self, w3):
        from web3.exceptions import ContractLogicError

        w3.eth.wait_for_transaction_receipt.return_value = {"blockNumber": 101, "status": 0, "logs": []}
        w3.eth.get_transaction.return_value = {"from": VALUE_ADDRESS, "to": VALUE_ADDRESS, "input": b"\x01", "value": 0}
        w3.eth.call.side_effect = ContractLogicError("execution reverted: Moebius: paused")
        relay = Relay(Web3Ledger("http://localhost:8545", web3=w3), VALUE_ADDRESS)

        with pytest.raises(RelayUnavailable):
            relay.confirm(TxHandle("0x" + "03" * 32, 100), timeout=5)

    def test_failed_receipt_without_revert(self, w3):
        w3.eth.wait_for_transaction_receipt.return_value = {"blockNumber": 101, "status": 0, "logs": []}
        w3.eth.get_transaction.return_value = {"from": VALUE_ADDRESS, "to": VALUE_ADDRESS, "input": b"\x01", "value": 0}
        w3.eth.call.return_value = b""
        ledger = Web3Ledger("http://localhost:8545", web3=w3)

        receipt = ledger.wait_for_inclusion(TxHandle("0x" + "03" * 32, 100), timeout=5)

        assert receipt.revert_reason is None

    def test_timeout_translation(self, w3):
        from web3.exceptions import TimeExhausted

        w3.eth.wait_for_transaction_receipt.side_effect = TimeExhausted("slow")
        ledger = Web3Ledger("http://localhost:8545", web3=w3)
        with pytest.raises(InclusionTimeout):
            ledger.wait_for_inclusion(TxHandle("0xabc", 100), timeout=1)

    def test_call_revert_translation(self, w3):
        from web3.exceptions import ContractLogicError

        w3.eth.call.side_effect = ContractLogicError("execution reverted: Moebius: paused")
        ledger = Web3Ledger("http://localhost:8545", web3=w3)
        with pytest.raises(Revert) as exc_info:
            ledger.call(VALUE_ADDRESS, b"")
        assert exc_info.value.reason == "Moebius: paused"

    def test_query_logs_params(self, w3):
        w3.eth.get_logs.return_value = []
        ledger = Web3Ledger("http://localhost:8545", web3=w3)
        ledger.query_logs(VALUE_ADDRESS, 5, topics=[b"\x01" * 32])
        params = w3.eth.get_logs.call_args[0][0]
        assert params["fromBlock"] == 5
        assert params["toBlock"] == "latest"
        assert params["topics"] == ["0x" + "01" * 32]
