"""
Argument builders - produce the argument list for each keeper cycle.

A builder maps a params dict (from the keeper configuration) to the
ordered argument list for the configured entry point. Builders may read
external state; any exception they raise fails only the current cycle.

Builtin builders:
- static: returns params["args"] unchanged
- random_values: fresh random (bytes32, address, uint256) for SimpleContract
"""

import secrets
from typing import Any, Callable

from eth_utils import to_checksum_address


# Type alias for builder functions
BuilderFn = Callable[[dict], list]


def static_args(params: dict) -> list:
    """Fixed arguments from configuration."""
    return list(params.get("args", []))


def random_values(params: dict) -> list:
    """Random (bytes32, address, uint256), as the sample refresher sends."""
    return [
        secrets.token_bytes(32),
        to_checksum_address(secrets.token_bytes(20)),
        int.from_bytes(secrets.token_bytes(32), "big"),
    ]


_BUILDERS: dict[str, BuilderFn] = {
    "static": static_args,
    "random_values": random_values,
}


def get_builder(name: str) -> BuilderFn:
    """
    Get an argument builder by name.

    Raises:
        ValueError: If builder name is not registered
    """
    fn = _BUILDERS.get(name)
    if fn is None:
        raise ValueError(f"Unknown argument builder: {name}")
    return fn


def register_builder(name: str, fn: BuilderFn) -> None:
    """
    Register an argument builder by name.

    Used to plug in builders that read external price or state sources.
    """
    _BUILDERS[name] = fn


def list_builders() -> list[str]:
    return sorted(_BUILDERS)


def bind(name: str, params: dict[str, Any]) -> Callable[[], list]:
    """Bind a builder to its params, giving the zero-argument form the keeper calls."""
    fn = get_builder(name)
    return lambda: fn(params)
