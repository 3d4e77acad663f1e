"""
CLI interface for moebius.

Provides one-shot commands (encode, dispatch, fetch) that exit 0 on
success and 1 on any error, the long-running keeper and watcher, and a
local sandbox that runs the whole dispatch/correlate cycle on an
in-memory ledger.
"""

import json
import secrets
import time
from pathlib import Path

import click
from eth_utils import to_checksum_address

from moebius import __version__


def _get_config(ctx):
    """Load configuration once per invocation, exiting 1 if it is unusable."""
    from moebius.config import load_config
    from moebius.errors import ConfigError

    if "config" not in ctx.obj:
        try:
            ctx.obj["config"] = load_config(ctx.obj.get("config_path"))
        except ConfigError as e:
            click.echo(f"✗ Config not loaded: {e}", err=True)
            click.echo("Run 'moebius init' to create a configuration file.", err=True)
            raise SystemExit(1)
    return ctx.obj["config"]


def _setup_logging(ctx, config=None):
    from moebius.utils import setup_logging

    level = "DEBUG" if ctx.obj.get("verbose") else None
    if config is None:
        return setup_logging(log_level=level or "INFO")
    return setup_logging(
        log_file=config.get_log_file_path(),
        log_level=level or config.get_log_level(),
        log_format=config.get_log_format(),
        console_output=config.should_log_to_console(),
    )


def _get_ledger(config):
    """Ledger client for the configured network."""
    from moebius.ledger import Web3Ledger

    return Web3Ledger(
        config.network.get_rpc_url(),
        private_key=config.network.get_private_key(),
        chain_id=config.network.chain_id,
        request_timeout=config.network.request_timeout,
        poll_interval=config.network.poll_interval,
    )


def _state_types(schema) -> tuple:
    from moebius.programs import STATE_ENTRY_POINT

    return schema.entry_point(STATE_ENTRY_POINT).outputs


def _coerce_args(schema, entry_point: str, raw_args) -> list:
    from moebius.abi import coerce_argument
    from moebius.errors import ArgumentTypeMismatch

    ep = schema.entry_point(entry_point)
    if len(raw_args) != len(ep.inputs):
        raise ArgumentTypeMismatch(
            ep.signature, len(raw_args), f"{len(ep.inputs)} arguments", list(raw_args),
            reason=f"expected {len(ep.inputs)} arguments, got {len(raw_args)}",
        )
    return [coerce_argument(t, a) for t, a in zip(ep.inputs, raw_args)]


def _hexify(values) -> list:
    return ["0x" + v.hex() if isinstance(v, (bytes, bytearray)) else v for v in values]


@click.group()
@click.version_option(version=__version__, prog_name="moebius")
@click.option("--config", "config_path", type=click.Path(path_type=Path), default=None,
              help="Path to config.yaml (default: $MOEBIUS_HOME/config.yaml)")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging")
@click.pass_context
def main(ctx, config_path, verbose):
    """
    moebius - generic relay dispatch and result correlation.

    Dispatch arbitrary calls through the Moebius relay, recover their
    results from the relay's correlation records, and keep targets fresh
    with periodic keepers.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


@main.command("init")
@click.option("--force", is_flag=True, help="Overwrite existing configuration")
def init(force: bool):
    """Initialize moebius configuration."""
    import yaml
    from moebius.config import get_moebius_home

    home = get_moebius_home()
    if not home.exists():
        home.mkdir(parents=True)

    cfg_path = home / "config.yaml"
    if cfg_path.exists() and not force:
        click.echo(f"Config already exists at {cfg_path}. Use --force to overwrite.", err=True)
        raise SystemExit(1)

    default_cfg = {
        "network": {
            "name": "ganache",
            "rpc_url": "http://localhost:8545",
            "chain_id": 98765,
            "private_key_env": "ETH_PRIVATE_KEY",
        },
        "relay": {"address": "0x0000000000000000000000000000000000000000"},
        "keepers": {
            "uniswap-oracle": {
                "contract": "UniswapOracle",
                "target": "0x0000000000000000000000000000000000000000",
                "entry_point": "updateAndConsult",
                "builder": "static",
                "args": ["0xc778417e063141139fce010982780140aa0cd5ab", 10 ** 18],
                "period": 60,
                "retry_delay": 60,
                "gas": 120000,
                "gas_price": 4000000000,
                "confirmation": "inclusion",
                "inclusion_timeout": None,
            },
        },
        "logging": {
            "level": "INFO",
            "format": "pretty",
            "output": str(home / "logs" / "moebius-{date}.log"),
            "console": True,
        },
    }
    cfg_path.write_text(yaml.safe_dump(default_cfg, sort_keys=False))

    env_path = home / ".env"
    if not env_path.exists():
        env_path.write_text("# ETH_PRIVATE_KEY=0x...\n")

    click.echo(f"Initialized moebius config at {cfg_path}")
    click.echo("Set relay.address and keeper targets before running keepers.")


@main.command("decode-id")
@click.argument("identifier")
@click.option("--width", default=32, show_default=True, help="Required byte length")
def decode_id(identifier: str, width: int):
    """Decode a base58 program/account id to 0x hex."""
    from moebius.errors import MalformedIdentifier
    from moebius.identifiers import to_hex

    try:
        click.echo(to_hex(identifier, width))
    except MalformedIdentifier as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)


@main.command("encode")
@click.argument("contract")
@click.argument("entry_point")
@click.argument("args", nargs=-1)
def encode(contract: str, entry_point: str, args):
    """
    Print calldata for CONTRACT.ENTRY_POINT(ARGS...).

    Examples:

        moebius encode SimpleContract getValues

        moebius encode UniswapOracle updateAndConsult 0xc778417e063141139fce010982780140aa0cd5ab 1000000000000000000
    """
    from moebius.abi import get_schema
    from moebius.errors import EncodingError

    try:
        schema = get_schema(contract)
        payload = schema.encode(entry_point, _coerce_args(schema, entry_point, args))
    except (EncodingError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    click.echo("0x" + payload.hex())


@main.command("dispatch")
@click.argument("contract")
@click.argument("target")
@click.argument("entry_point")
@click.argument("args", nargs=-1)
@click.option("--gas", type=int, default=None, help="Gas limit")
@click.option("--gas-price", type=int, default=None, help="Gas price (wei)")
@click.option("--timeout", type=float, default=None, help="Inclusion timeout in seconds (default: wait indefinitely)")
@click.option("--no-wait", is_flag=True, help="Exit after submission")
@click.option("--correlate", is_flag=True, help="Fetch and decode the correlation record after inclusion")
@click.pass_context
def dispatch(ctx, contract, target, entry_point, args, gas, gas_price, timeout, no_wait, correlate):
    """
    Dispatch CONTRACT.ENTRY_POINT(ARGS...) on TARGET through the relay.

    Exits 0 on success and 1 on any error.
    """
    from moebius.abi import get_schema
    from moebius.correlator import ResultCorrelator
    from moebius.relay import Relay

    config = _get_config(ctx)
    _setup_logging(ctx, config)

    try:
        schema = get_schema(contract)
        payload = schema.encode(entry_point, _coerce_args(schema, entry_point, args))
        ledger = _get_ledger(config)
        relay = Relay(ledger, config.get_relay_address())

        handle = relay.execute(target, payload, gas=gas, gas_price=gas_price)
        click.echo(f"{entry_point}: {handle.tx_hash}")
        if no_wait:
            return

        receipt = relay.confirm(handle, timeout=timeout)
        click.echo(f"✓ included in block {receipt.block_number}")

        if correlate:
            key = ledger.get_contract_handle(contract, target).read("accountId")
            correlator = ResultCorrelator(ledger, _state_types(schema))
            result = correlator.fetch(
                relay.address, key, from_block=receipt.block_number, to_block=receipt.block_number,
            )
            click.echo(json.dumps(_hexify(result.values)))
    except Exception as e:
        click.echo(f"✗ {entry_point} failed: {e}", err=True)
        raise SystemExit(1)


@main.command("fetch")
@click.argument("contract")
@click.argument("key")
@click.option("--from-block", type=int, required=True, help="First block to scan")
@click.option("--to-block", type=int, default=None, help="Last block to scan (default: latest)")
@click.option("--latest", is_flag=True, help="Return the most recent match instead of the first")
@click.option("--all", "fetch_all", is_flag=True, help="Return every match")
@click.pass_context
def fetch(ctx, contract, key, from_block, to_block, latest, fetch_all):
    """
    Fetch the state recorded for correlation KEY (base58 or 0x hex).

    CONTRACT names the schema used to decode the packed state.
    """
    from moebius.abi import get_schema
    from moebius.correlator import ResultCorrelator, describe
    from moebius.errors import NotFound
    from moebius.identifiers import parse_key

    config = _get_config(ctx)
    _setup_logging(ctx, config)

    try:
        schema = get_schema(contract)
        correlator = ResultCorrelator(_get_ledger(config), _state_types(schema))
        relay_address = config.get_relay_address()
        correlation_key = parse_key(key)
        if fetch_all:
            results = correlator.fetch_all(relay_address, correlation_key, from_block, to_block)
        else:
            results = [correlator.fetch(relay_address, correlation_key, from_block, to_block, latest=latest)]
    except NotFound as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)
    except Exception as e:
        click.echo(f"✗ fetch failed: {e}", err=True)
        raise SystemExit(1)

    for result in results:
        click.echo(json.dumps(describe(result.record, result.values)))


@main.command("watch")
@click.option("--from-block", type=int, default=None, help="First block to scan (default: current head)")
@click.option("--interval", type=float, default=1.0, show_default=True, help="Polling interval in seconds")
@click.pass_context
def watch(ctx, from_block, interval):
    """Print correlation records emitted by the relay as they appear."""
    from moebius.correlator import CorrelationWatcher, describe

    config = _get_config(ctx)
    _setup_logging(ctx, config)

    ledger = _get_ledger(config)
    start = from_block if from_block is not None else ledger.block_number()
    watcher = CorrelationWatcher(ledger, config.get_relay_address(), start, poll_interval=interval)
    try:
        for record in watcher:
            click.echo(json.dumps(describe(record)))
    except KeyboardInterrupt:
        watcher.stop()


@main.group("keeper")
def keeper_group():
    """Run and inspect configured keepers."""
    pass


@keeper_group.command("list")
@click.pass_context
def keeper_list(ctx):
    """List configured keepers."""
    config = _get_config(ctx)
    if not config.keepers:
        click.echo("No keepers configured.")
        return
    for name, keeper in config.keepers.items():
        state = "" if keeper.enabled else " (disabled)"
        click.echo(f"  {name}: {keeper.contract}.{keeper.entry_point} every {keeper.period}s{state}")


@keeper_group.command("run")
@click.argument("names", nargs=-1)
@click.pass_context
def keeper_run(ctx, names):
    """
    Run keepers until interrupted (all enabled keepers if NAMES is empty).

    A failing cycle is logged and retried; it never stops the process.
    """
    from moebius.correlator import ResultCorrelator
    from moebius.errors import ConfigError, EncodingError
    from moebius.keeper import ConfirmationPolicy, Keeper, run_keepers
    from moebius.relay import Relay

    config = _get_config(ctx)
    logger = _setup_logging(ctx, config)

    try:
        config.validate()
        if names:
            unknown = [n for n in names if n not in config.keepers]
            if unknown:
                raise ConfigError(f"Unknown keeper(s): {', '.join(unknown)}")
            selected = [config.keepers[n] for n in names]
        else:
            selected = config.get_enabled_keepers()
        if not selected:
            raise ConfigError("No keepers to run")

        ledger = _get_ledger(config)
        relay_address = config.get_relay_address()
        keepers = []
        for keeper_config in selected:
            task = keeper_config.to_task(relay_address)
            correlator = None
            if task.confirmation == ConfirmationPolicy.CORRELATION:
                correlator = ResultCorrelator(ledger, _state_types(task.schema))
            keepers.append(Keeper(task, Relay(ledger, relay_address), correlator))
    except (ConfigError, EncodingError) as e:
        click.echo(f"✗ {e}", err=True)
        raise SystemExit(1)

    logger.info(f"Starting {len(keepers)} keeper(s) on {config.network.name}")
    run_keepers(keepers)


@main.command("sandbox")
@click.option("--cycles", type=int, default=3, show_default=True, help="Keeper cycles to run")
@click.option("--period", type=float, default=0.1, show_default=True, help="Seconds between cycles")
@click.pass_context
def sandbox(ctx, cycles, period):
    """
    Run the dispatch/correlate cycle on an in-memory ledger.

    Deploys a relay and a SimpleContract, then refreshes the contract with
    random values through the relay, confirming each cycle by correlation.
    """
    from moebius.abi import SIMPLE_CONTRACT, SIMPLE_VALUES
    from moebius.builders import random_values
    from moebius.correlator import ResultCorrelator
    from moebius.identifiers import encode as b58encode
    from moebius.keeper import ConfirmationPolicy, Keeper, KeeperTask
    from moebius.ledger import InMemoryLedger
    from moebius.programs import RelayProgram, SimpleContract
    from moebius.relay import Relay

    _setup_logging(ctx)

    ledger = InMemoryLedger()
    relay_address = ledger.deploy(RelayProgram())
    click.echo(f"Moebius deployed at: {relay_address}")

    account_id = secrets.token_bytes(32)
    target = ledger.deploy(SimpleContract(
        secrets.token_bytes(32),
        account_id,
        secrets.token_bytes(32),
        to_checksum_address(secrets.token_bytes(20)),
        int.from_bytes(secrets.token_bytes(32), "big"),
    ))
    click.echo(f"SimpleContract deployed at: {target} (account {b58encode(account_id)})")

    task = KeeperTask(
        name="sandbox",
        relay_address=relay_address,
        target_address=target,
        schema=SIMPLE_CONTRACT,
        entry_point="setAndGetValues",
        argument_builder=lambda: random_values({}),
        period=period,
        confirmation=ConfirmationPolicy.CORRELATION,
        correlation_key=account_id,
    )
    keeper = Keeper(task, Relay(ledger, relay_address), ResultCorrelator(ledger, SIMPLE_VALUES))
    failed = 0
    for _ in range(cycles):
        outcome = keeper.run_cycle()
        if outcome.success:
            click.echo(f"✓ block {outcome.receipt.block_number}: {json.dumps(_hexify(outcome.result.values))}")
        else:
            failed += 1
            click.echo(f"✗ cycle {outcome.cycle}: {outcome.error}", err=True)
        time.sleep(period)

    if failed:
        raise SystemExit(1)
