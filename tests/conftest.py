import pytest
from eth_utils import to_checksum_address

from moebius.correlator import ResultCorrelator
from moebius.abi import SIMPLE_VALUES, ORACLE_VALUES
from moebius.ledger import InMemoryLedger
from moebius.programs import RelayProgram, SimpleContract, UniswapOracle, FixedRate
from moebius.relay import Relay


PROGRAM_ID = bytes.fromhex("11" * 32)
ACCOUNT_ID = bytes.fromhex("22" * 32)
ORACLE_ACCOUNT_ID = bytes.fromhex("33" * 32)

VALUE_BYTES32 = bytes.fromhex("ab" * 32)
VALUE_ADDRESS = to_checksum_address("0x000000000000000000000000000000000000beef")
VALUE_UINT = 42

FACTORY = to_checksum_address("0x5c69bee701ef814a2b6a3edd4b1652cb9cc5aa6f")
WETH = to_checksum_address("0xc778417e063141139fce010982780140aa0cd5ab")
UNI = to_checksum_address("0x1f9840a85d5af5bf1d1762f925bdaddc4201f984")


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def relay_address(ledger):
    return ledger.deploy(RelayProgram())


@pytest.fixture
def relay(ledger, relay_address):
    return Relay(ledger, relay_address)


@pytest.fixture
def simple_contract(ledger):
    """SimpleContract deployed with accountId ACCOUNT_ID."""
    program = SimpleContract(PROGRAM_ID, ACCOUNT_ID, VALUE_BYTES32, VALUE_ADDRESS, VALUE_UINT)
    ledger.deploy(program)
    return program


@pytest.fixture
def oracle(ledger):
    """UniswapOracle quoting 1 WETH = 2 UNI."""
    program = UniswapOracle(PROGRAM_ID, ORACLE_ACCOUNT_ID, FACTORY, WETH, UNI, price_source=FixedRate(2, 1))
    ledger.deploy(program)
    return program


@pytest.fixture
def simple_correlator(ledger):
    return ResultCorrelator(ledger, SIMPLE_VALUES)


@pytest.fixture
def oracle_correlator(ledger):
    return ResultCorrelator(ledger, ORACLE_VALUES)
