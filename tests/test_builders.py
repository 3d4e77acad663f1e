"""Tests for argument builders."""

import pytest
from eth_utils import is_checksum_address

from moebius.abi import SIMPLE_CONTRACT
from moebius.builders import bind, get_builder, list_builders, random_values, register_builder, static_args


class TestBuiltinBuilders:
    """Tests for the bundled builders."""

    def test_static_args(self):
        assert static_args({"args": [1, "0xabc"]}) == [1, "0xabc"]

    def test_static_args_default(self):
        assert static_args({}) == []

    def test_random_values_shape(self):
        val_bytes32, val_address, val_uint = random_values({})
        assert len(val_bytes32) == 32
        assert is_checksum_address(val_address)
        assert 0 <= val_uint < 2 ** 256

    def test_random_values_encode(self):
        """Random values are always valid setAndGetValues arguments."""
        for _ in range(5):
            SIMPLE_CONTRACT.encode("setAndGetValues", random_values({}))

    def test_random_values_differ(self):
        assert random_values({}) != random_values({})


class TestRegistry:
    """Tests for the builder registry."""

    def test_get_builder(self):
        assert get_builder("static") is static_args

    def test_unknown_builder(self):
        with pytest.raises(ValueError, match="Unknown argument builder"):
            get_builder("nope")

    def test_register_and_bind(self):
        register_builder("double", lambda params: [params["value"] * 2])
        assert "double" in list_builders()
        builder = bind("double", {"value": 21})
        assert builder() == [42]
