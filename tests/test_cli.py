"""Tests for the moebius CLI."""

from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from conftest import ACCOUNT_ID, PROGRAM_ID, VALUE_ADDRESS, VALUE_BYTES32, VALUE_UINT, WETH
from moebius.abi import SIMPLE_CONTRACT, UNISWAP_ORACLE
from moebius.cli import main
from moebius.errors import UnknownEntryPoint
from moebius.identifiers import encode as b58encode
from moebius.ledger import InMemoryLedger
from moebius.programs import RelayProgram, SimpleContract


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def deployed():
    """In-memory ledger with a relay and a SimpleContract."""
    ledger = InMemoryLedger()
    relay_address = ledger.deploy(RelayProgram())
    target = ledger.deploy(SimpleContract(PROGRAM_ID, ACCOUNT_ID, VALUE_BYTES32, VALUE_ADDRESS, VALUE_UINT))
    return ledger, relay_address, target


@pytest.fixture
def config_path(tmp_path, deployed):
    _, relay_address, target = deployed
    path = tmp_path / "config.yaml"
    path.write_text(yaml.safe_dump({
        "network": {"name": "test", "rpc_url": "http://localhost:8545"},
        "relay": {"address": relay_address},
        "keepers": {
            "refresh": {
                "contract": "SimpleContract",
                "target": target,
                "entry_point": "getValues",
                "period": 1,
            },
        },
        "logging": {"console": False},
    }))
    return path


def test_version(runner):
    result = runner.invoke(main, ["--version"])
    assert result.exit_code == 0
    assert "0.1.0" in result.output


class TestInit:
    """Tests for moebius init."""

    def test_creates_files(self, runner, tmp_path, monkeypatch):
        home = tmp_path / "home"
        monkeypatch.setenv("MOEBIUS_HOME", str(home))

        result = runner.invoke(main, ["init"])

        assert result.exit_code == 0
        assert "Initialized moebius config" in result.output
        cfg = yaml.safe_load((home / "config.yaml").read_text())
        assert cfg["network"]["chain_id"] == 98765
        assert "uniswap-oracle" in cfg["keepers"]
        assert (home / ".env").exists()

    def test_does_not_overwrite(self, runner, tmp_path, monkeypatch):
        home = tmp_path / "home"
        home.mkdir()
        (home / "config.yaml").write_text("existing: true")
        monkeypatch.setenv("MOEBIUS_HOME", str(home))

        result = runner.invoke(main, ["init"])

        assert result.exit_code == 1
        assert (home / "config.yaml").read_text() == "existing: true"

    def test_force(self, runner, tmp_path, monkeypatch):
        home = tmp_path / "home"
        home.mkdir()
        (home / "config.yaml").write_text("existing: true")
        monkeypatch.setenv("MOEBIUS_HOME", str(home))

        result = runner.invoke(main, ["init", "--force"])

        assert result.exit_code == 0
        assert "network" in yaml.safe_load((home / "config.yaml").read_text())


class TestEncoding:
    """Tests for decode-id and encode."""

    def test_decode_id(self, runner):
        result = runner.invoke(main, ["decode-id", b58encode(ACCOUNT_ID)])
        assert result.exit_code == 0
        assert result.output.strip() == "0x" + ACCOUNT_ID.hex()

    def test_decode_id_malformed(self, runner):
        result = runner.invoke(main, ["decode-id", "0OIl"])
        assert result.exit_code == 1

    def test_encode(self, runner):
        result = runner.invoke(main, ["encode", "UniswapOracle", "updateAndConsult", WETH, "1000"])
        assert result.exit_code == 0
        expected = UNISWAP_ORACLE.encode("updateAndConsult", [WETH, 1000])
        assert result.output.strip() == "0x" + expected.hex()

    def test_encode_base58_bytes32(self, runner):
        args = ["encode", "SimpleContract", "setAndGetValues", b58encode(VALUE_BYTES32), VALUE_ADDRESS, "7"]
        result = runner.invoke(main, args)
        assert result.exit_code == 0
        expected = SIMPLE_CONTRACT.encode("setAndGetValues", [VALUE_BYTES32, VALUE_ADDRESS, 7])
        assert result.output.strip() == "0x" + expected.hex()

    def test_encode_negative_uint(self, runner):
        result = runner.invoke(main, ["encode", "UniswapOracle", "updateAndConsult", WETH, "--", "-1"])
        assert result.exit_code == 1

    def test_encode_unknown_entry_point(self, runner):
        result = runner.invoke(main, ["encode", "SimpleContract", "nope"])
        assert result.exit_code == 1

    def test_encode_wrong_arity(self, runner):
        result = runner.invoke(main, ["encode", "UniswapOracle", "updateAndConsult", WETH])
        assert result.exit_code == 1


class TestDispatch:
    """Tests for one-shot dispatch and fetch."""

    def test_success(self, runner, deployed, config_path):
        ledger, _, target = deployed
        with patch("moebius.cli._get_ledger", return_value=ledger):
            result = runner.invoke(main, [
                "--config", str(config_path), "dispatch", "SimpleContract", target,
                "setAndGetValues", "0x" + "05" * 32, VALUE_ADDRESS, "9", "--correlate",
            ])

        assert result.exit_code == 0, result.output
        assert "included in block" in result.output
        assert '"0x' + "05" * 32 + '"' in result.output

    def test_target_revert_exits_1(self, runner, deployed, config_path):
        ledger, _, target = deployed
        with patch("moebius.cli._get_ledger", return_value=ledger):
            result = runner.invoke(main, [
                "--config", str(config_path), "dispatch", "UniswapOracle", target,
                "updateAndConsult", WETH, "1",
            ])
        assert result.exit_code == 1

    def test_offline_exits_1(self, runner, deployed, config_path):
        ledger, _, target = deployed
        ledger.set_online(False)
        with patch("moebius.cli._get_ledger", return_value=ledger):
            result = runner.invoke(main, [
                "--config", str(config_path), "dispatch", "SimpleContract", target, "getValues",
            ])
        assert result.exit_code == 1

    def test_missing_config_exits_1(self, runner, tmp_path):
        result = runner.invoke(main, [
            "--config", str(tmp_path / "missing.yaml"), "dispatch", "SimpleContract", VALUE_ADDRESS, "getValues",
        ])
        assert result.exit_code == 1

    def test_fetch(self, runner, deployed, config_path):
        ledger, _, target = deployed
        start = ledger.block_number()
        with patch("moebius.cli._get_ledger", return_value=ledger):
            runner.invoke(main, ["--config", str(config_path), "dispatch", "SimpleContract", target, "getValues"])
            result = runner.invoke(main, [
                "--config", str(config_path), "fetch", "SimpleContract", b58encode(ACCOUNT_ID),
                "--from-block", str(start),
            ])

        assert result.exit_code == 0, result.output
        assert "0x" + ACCOUNT_ID.hex() in result.output
        assert str(VALUE_UINT) in result.output

    def test_fetch_not_found(self, runner, deployed, config_path):
        ledger, _, _ = deployed
        with patch("moebius.cli._get_ledger", return_value=ledger):
            result = runner.invoke(main, [
                "--config", str(config_path), "fetch", "SimpleContract", "0x" + ACCOUNT_ID.hex(),
                "--from-block", "0",
            ])
        assert result.exit_code == 1


class TestKeeperCommands:
    """Tests for keeper list and keeper run."""

    def test_list(self, runner, config_path):
        result = runner.invoke(main, ["--config", str(config_path), "keeper", "list"])
        assert result.exit_code == 0
        assert "refresh: SimpleContract.getValues" in result.output

    def test_run_unknown_keeper(self, runner, config_path):
        result = runner.invoke(main, ["--config", str(config_path), "keeper", "run", "nope"])
        assert result.exit_code == 1

    def test_run(self, runner, deployed, config_path):
        ledger, _, _ = deployed
        with patch("moebius.cli._get_ledger", return_value=ledger), \
                patch("moebius.keeper.run_keepers") as mock_run:
            result = runner.invoke(main, ["--config", str(config_path), "keeper", "run"])

        assert result.exit_code == 0, result.output
        (keepers,) = mock_run.call_args[0]
        assert [k.task.name for k in keepers] == ["refresh"]

    def _stateless_config(self, tmp_path, relay_address, **keeper):
        path = tmp_path / "stateless.yaml"
        path.write_text(yaml.safe_dump({
            "relay": {"address": relay_address},
            "keepers": {"pauser": {"contract": "Moebius", "target": relay_address, "entry_point": "pause", **keeper}},
            "logging": {"console": False},
        }))
        return path

    def test_run_target_without_state(self, runner, tmp_path, deployed):
        """Keepers on targets without getValues() run when they do not correlate."""
        ledger, relay_address, _ = deployed
        path = self._stateless_config(tmp_path, relay_address)
        with patch("moebius.cli._get_ledger", return_value=ledger), \
                patch("moebius.keeper.run_keepers") as mock_run:
            result = runner.invoke(main, ["--config", str(path), "keeper", "run"])

        assert result.exit_code == 0, result.output
        (keepers,) = mock_run.call_args[0]
        assert keepers[0].correlator is None

    def test_run_correlation_without_state_exits_1(self, runner, tmp_path, deployed):
        ledger, relay_address, _ = deployed
        path = self._stateless_config(tmp_path, relay_address, confirmation="correlation")
        with patch("moebius.cli._get_ledger", return_value=ledger), \
                patch("moebius.keeper.run_keepers") as mock_run:
            result = runner.invoke(main, ["--config", str(path), "keeper", "run"])

        assert result.exit_code == 1
        assert not isinstance(result.exception, UnknownEntryPoint)
        mock_run.assert_not_called()


def test_sandbox(runner):
    result = runner.invoke(main, ["sandbox", "--cycles", "2", "--period", "0.01"])
    assert result.exit_code == 0, result.output
    assert "Moebius deployed at" in result.output
    assert result.output.count("✓ block") == 2
