"""Tests for request validation and field encoding."""

import pytest

from zkasp.core.validation import (
    FELT252_MAX,
    MAX_TICK,
    unsigned_tick,
    validate_address,
    validate_decimal,
    validate_hex_u256,
    validate_leaf_index,
    validate_liquidity,
    validate_secret,
    validate_tick_range,
)
from zkasp.exceptions import ValidationError
from zkasp.utils.encoding import (
    U256_MAX,
    bytes_to_hex,
    field_to_decimal,
    field_to_hex,
    hex_to_bytes,
    parse_int,
    span_calldata,
    to_field_bytes,
    u256_to_felts,
)


class TestHexU256:
    """0x-prefixed u256 values."""

    def test_valid(self):
        assert validate_hex_u256("0x1", "commitment") == 1
        assert validate_hex_u256("0XfF", "commitment") == 255
        assert validate_hex_u256("0x" + "f" * 64, "commitment") == U256_MAX

    @pytest.mark.parametrize("value", ["", "1234", "0x", "0xzz", "0x1_0", "0x 1", "0x" + "1" * 65])
    def test_invalid(self, value):
        with pytest.raises(ValidationError):
            validate_hex_u256(value, "commitment")

    def test_error_names_field(self):
        with pytest.raises(ValidationError, match="sqrt_price_limit"):
            validate_hex_u256("nope", "sqrt_price_limit")


class TestDecimalAndAddress:
    """Decimal amounts and felt addresses."""

    def test_decimal(self):
        assert validate_decimal("0", "amount_low") == 0
        assert validate_decimal("340282366920938463463374607431768211455", "amount_low") == 2 ** 128 - 1

    @pytest.mark.parametrize("value", ["", "-1", "1.5", "0x10", " 1", "١٢"])
    def test_decimal_invalid(self, value):
        with pytest.raises(ValidationError):
            validate_decimal(value, "amount_low")

    def test_address(self):
        assert validate_address("0x49d36570d4e46f48e99674bd3fcc84644ddd6b96f7c741b1562b82f9e004dc7", "token") > 0
        assert validate_address(hex(FELT252_MAX - 1), "token") == FELT252_MAX - 1

    @pytest.mark.parametrize("value", ["", "123", "0x", hex(FELT252_MAX)])
    def test_address_invalid(self, value):
        with pytest.raises(ValidationError):
            validate_address(value, "recipient")


class TestTicksAndLiquidity:
    """CLMM-specific fields."""

    def test_tick_range(self):
        validate_tick_range(-60, 60)
        validate_tick_range(-MAX_TICK, MAX_TICK)

    @pytest.mark.parametrize("lower,upper", [(60, 60), (60, -60), (-MAX_TICK - 1, 0), (0, MAX_TICK + 1)])
    def test_tick_range_invalid(self, lower, upper):
        with pytest.raises(ValidationError):
            validate_tick_range(lower, upper)

    def test_unsigned_tick(self):
        assert unsigned_tick(-MAX_TICK) == 0
        assert unsigned_tick(0) == MAX_TICK
        assert unsigned_tick(MAX_TICK) == 2 * MAX_TICK

    def test_liquidity(self):
        validate_liquidity(1)
        validate_liquidity(2 ** 128 - 1)
        with pytest.raises(ValidationError):
            validate_liquidity(0)
        with pytest.raises(ValidationError):
            validate_liquidity(2 ** 128)

    def test_secret_and_leaf_index(self):
        validate_secret("anything at all", "secret")
        with pytest.raises(ValidationError):
            validate_secret("", "secret")
        validate_leaf_index(0)
        with pytest.raises(ValidationError):
            validate_leaf_index(-1)


class TestEncoding:
    """Field element encodings."""

    def test_hex_round_trip(self):
        assert bytes_to_hex(b"\x00\x01") == "0x0001"
        assert hex_to_bytes("0x0001") == b"\x00\x01"
        with pytest.raises(ValueError):
            hex_to_bytes("0x123")

    def test_parse_int(self):
        assert parse_int("0x10") == 16
        assert parse_int("10") == 10
        assert parse_int(7) == 7

    def test_to_field_bytes(self):
        assert to_field_bytes("0x1") == (1).to_bytes(32, "big")
        assert to_field_bytes("255") == (255).to_bytes(32, "big")
        assert to_field_bytes(b"\x01") == (1).to_bytes(32, "big")
        with pytest.raises(ValueError):
            to_field_bytes(U256_MAX + 1)
        with pytest.raises(ValueError):
            to_field_bytes("not a number")

    def test_field_renderings(self):
        value = (300).to_bytes(32, "big")
        assert field_to_hex(value) == "0x12c"
        assert field_to_decimal(value) == "300"

    def test_u256_split(self):
        low, high = u256_to_felts((5 << 128) | 9)
        assert (low, high) == ("0x9", "0x5")
        with pytest.raises(ValueError):
            u256_to_felts(-1)

    def test_span_calldata(self):
        assert span_calldata(["0x1", "2"]) == ["0x2", "0x1", "0x2"]
