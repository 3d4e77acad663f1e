"""
Configuration management for moebius.

Loads and validates config.yaml: network selection, relay address,
keeper tasks and logging. Secrets (the signing key) are read from the
environment, optionally populated from a .env file.
"""

import os
import re
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from eth_utils import is_address, to_checksum_address

from moebius.abi import ContractSchema, get_schema
from moebius.builders import bind, get_builder
from moebius.errors import ConfigError, MalformedIdentifier, UnknownEntryPoint
from moebius.identifiers import parse_key
from moebius.keeper import ConfirmationPolicy, KeeperTask


ENV_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


def get_moebius_home() -> Path:
    """Config directory: $MOEBIUS_HOME or ~/.moebius."""
    return Path(os.environ.get("MOEBIUS_HOME", Path.home() / ".moebius")).expanduser()


def _expand_env(value: str) -> str:
    def replace(match):
        name = match.group(1)
        if name not in os.environ:
            raise ConfigError(f"Environment variable {name} is not set")
        return os.environ[name]

    return ENV_PATTERN.sub(replace, value)


def _checksum(value: Any, what: str) -> str:
    if not isinstance(value, str) or not is_address(value):
        raise ConfigError(f"{what} is not a valid address: {value!r}")
    return to_checksum_address(value)


class NetworkConfig:
    """Network selection and endpoint."""

    def __init__(self, data: Dict[str, Any]):
        self.name = data.get("name", "localhost")
        self.rpc_url = data.get("rpc_url", "http://localhost:8545")
        self.chain_id = data.get("chain_id")
        self.private_key_env = data.get("private_key_env", "ETH_PRIVATE_KEY")
        self.request_timeout = float(data.get("request_timeout", 30))
        self.poll_interval = float(data.get("poll_interval", 1.0))

    def get_rpc_url(self) -> str:
        return _expand_env(self.rpc_url)

    def get_private_key(self) -> Optional[str]:
        """Signing key from the environment, or None if unset."""
        return os.environ.get(self.private_key_env) or None

    def __repr__(self) -> str:
        return f"NetworkConfig(name={self.name}, rpc_url={self.rpc_url})"


class KeeperConfig:
    """Configuration for a single keeper task."""

    def __init__(self, name: str, data: Dict[str, Any]):
        self.name = name
        self.contract = data.get("contract")
        self.target = data.get("target")
        self.entry_point = data.get("entry_point")
        self.builder = data.get("builder", "static")
        self.args = data.get("args", [])
        self.period = data.get("period", 60)
        self.retry_delay = data.get("retry_delay")
        self.gas = data.get("gas")
        self.gas_price = data.get("gas_price")
        self.confirmation = data.get("confirmation", "inclusion")
        self.inclusion_timeout = data.get("inclusion_timeout")
        self.correlation_key = data.get("correlation_key")
        self.enabled = data.get("enabled", True)

        # Builder-specific params
        self.extra = {k: v for k, v in data.items() if k not in [
            "contract", "target", "entry_point", "builder", "period", "retry_delay",
            "gas", "gas_price", "confirmation", "inclusion_timeout", "correlation_key",
            "enabled",
        ]}

    def get_schema(self) -> ContractSchema:
        try:
            return get_schema(self.contract)
        except ValueError as e:
            raise ConfigError(f"Keeper {self.name}: {e}")

    def validate(self) -> None:
        """Validate keeper configuration."""
        if not self.contract:
            raise ConfigError(f"Keeper {self.name}: missing 'contract'")
        if not self.entry_point:
            raise ConfigError(f"Keeper {self.name}: missing 'entry_point'")
        schema = self.get_schema()
        try:
            schema.entry_point(self.entry_point)
        except UnknownEntryPoint as e:
            raise ConfigError(f"Keeper {self.name}: {e}")
        _checksum(self.target, f"Keeper {self.name}: target")

        if not isinstance(self.period, (int, float)) or self.period <= 0:
            raise ConfigError(f"Keeper {self.name}: period must be a positive number of seconds")
        if self.retry_delay is not None and (
            not isinstance(self.retry_delay, (int, float)) or self.retry_delay < 0
        ):
            raise ConfigError(f"Keeper {self.name}: retry_delay must be >= 0")
        if self.inclusion_timeout is not None and (
            not isinstance(self.inclusion_timeout, (int, float)) or self.inclusion_timeout <= 0
        ):
            raise ConfigError(f"Keeper {self.name}: inclusion_timeout must be positive or null")

        try:
            ConfirmationPolicy(self.confirmation)
        except ValueError:
            raise ConfigError(
                f"Keeper {self.name}: unknown confirmation policy {self.confirmation!r} "
                f"(expected one of: {', '.join(p.value for p in ConfirmationPolicy)})"
            )
        try:
            get_builder(self.builder)
        except ValueError as e:
            raise ConfigError(f"Keeper {self.name}: {e}")

        if self.correlation_key is not None:
            try:
                parse_key(self.correlation_key)
            except MalformedIdentifier as e:
                raise ConfigError(f"Keeper {self.name}: correlation_key: {e}")

    def to_task(self, relay_address: str) -> KeeperTask:
        """Build the KeeperTask this configuration describes."""
        self.validate()
        params = {"args": self.args, **self.extra}
        return KeeperTask(
            name=self.name,
            relay_address=relay_address,
            target_address=to_checksum_address(self.target),
            schema=self.get_schema(),
            entry_point=self.entry_point,
            argument_builder=bind(self.builder, params),
            period=float(self.period),
            retry_delay=float(self.retry_delay) if self.retry_delay is not None else None,
            confirmation=ConfirmationPolicy(self.confirmation),
            inclusion_timeout=self.inclusion_timeout,
            correlation_key=parse_key(self.correlation_key) if self.correlation_key is not None else None,
            gas=self.gas,
            gas_price=self.gas_price,
        )

    def __repr__(self) -> str:
        return f"KeeperConfig(name={self.name}, contract={self.contract}, entry_point={self.entry_point})"


class MoebiusConfig:
    """Complete moebius configuration."""

    def __init__(self, config_path: Path):
        self.config_path = config_path
        self.raw_config = self._load_yaml()

        self.network = NetworkConfig(self.raw_config.get("network", {}))

        relay = self.raw_config.get("relay", {})
        self.relay_address = relay.get("address")

        self.keepers: Dict[str, KeeperConfig] = {}
        for keeper_name, keeper_data in (self.raw_config.get("keepers") or {}).items():
            self.keepers[keeper_name] = KeeperConfig(keeper_name, keeper_data or {})

        # Logging
        self.logging = self.raw_config.get("logging", {})

    def _load_yaml(self) -> Dict[str, Any]:
        """Load and parse YAML configuration file."""
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, "r") as f:
                config = yaml.safe_load(f)
                if not config:
                    raise ConfigError("Configuration file is empty")
                return config
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML syntax: {e}")

    def get_relay_address(self) -> str:
        return _checksum(self.relay_address, "relay.address")

    def get_keeper(self, name: str) -> Optional[KeeperConfig]:
        """Get keeper configuration by name."""
        return self.keepers.get(name)

    def get_enabled_keepers(self) -> List[KeeperConfig]:
        return [k for k in self.keepers.values() if k.enabled]

    def get_log_file_path(self) -> Optional[Path]:
        """Get log file path with date interpolation, or None to skip file logging."""
        log_output = self.logging.get("output")
        if not log_output:
            return None
        log_output = log_output.replace("{date}", datetime.now().strftime("%Y-%m-%d"))
        return Path(log_output).expanduser()

    def get_log_level(self) -> str:
        """Get logging level."""
        return self.logging.get("level", "INFO").upper()

    def get_log_format(self) -> str:
        """Get log format (structured or pretty)."""
        return self.logging.get("format", "pretty")

    def should_log_to_console(self) -> bool:
        """Check if console logging is enabled."""
        return self.logging.get("console", True)

    def validate(self) -> None:
        """Validate entire configuration."""
        self.get_relay_address()

        for keeper_name, keeper in self.keepers.items():
            keeper.validate()

        if self.get_log_format() not in ("pretty", "structured"):
            raise ConfigError(f"Unknown log format: {self.get_log_format()}")

    def __repr__(self) -> str:
        return f"MoebiusConfig(network={self.network.name}, keepers={len(self.keepers)})"


def load_config(config_path: Optional[Path] = None) -> MoebiusConfig:
    """
    Load moebius configuration from YAML file.

    Args:
        config_path: Path to config file. Defaults to $MOEBIUS_HOME/config.yaml

    Returns:
        MoebiusConfig instance

    Raises:
        ConfigError: If config is invalid or missing
    """
    if config_path is None:
        config_path = get_moebius_home() / "config.yaml"

    # Secrets may live next to the config file
    env_file = config_path.parent / ".env"
    if env_file.exists():
        load_dotenv(env_file, override=False)

    return MoebiusConfig(config_path)
