"""Request field validation.

All checks raise ``ValidationError`` so malformed requests are rejected before
the ledger, the prover or the chain is touched.
"""

import string

from zkasp.exceptions import ValidationError
from zkasp.utils.encoding import U128_MASK, U256_MAX

# Max valid tick in the CLMM (before offset)
MAX_TICK = 887272
# Offset that maps signed ticks to the unsigned values the circuits use
TICK_OFFSET = MAX_TICK

# felt252 upper bound: 2^251 + 17 * 2^192
FELT252_MAX = (1 << 251) + (17 << 192)

HEX_DIGITS = frozenset(string.hexdigits)


def _strip_hex_prefix(value: str, field_name: str) -> str:
    if not value:
        raise ValidationError(f"{field_name} is required")
    if not value.startswith(("0x", "0X")):
        raise ValidationError(f"{field_name} must be hex-prefixed (0x...)")
    return value[2:]


def _parse_hex(digits: str, field_name: str) -> int:
    if not digits or any(c not in HEX_DIGITS for c in digits):
        raise ValidationError(f"{field_name} is not valid hex")
    return int(digits, 16)


def validate_hex_u256(value: str, field_name: str) -> int:
    """
    Validate a 0x-prefixed hex string that fits in 256 bits.

    Returns:
        int: Parsed value
    """
    digits = _strip_hex_prefix(value, field_name)
    if not digits:
        raise ValidationError(f"{field_name} has empty hex value")
    number = _parse_hex(digits, field_name)
    if number > U256_MAX:
        raise ValidationError(f"{field_name} exceeds u256 range")
    return number


def validate_decimal(value: str, field_name: str) -> int:
    """Validate a non-negative decimal integer string."""
    if not value:
        raise ValidationError(f"{field_name} is required")
    if not (value.isascii() and value.isdigit()):
        raise ValidationError(f"{field_name} must be a valid decimal number")
    return int(value)


def validate_address(value: str, field_name: str) -> int:
    """Validate a Starknet address (hex, fits in a felt252)."""
    digits = _strip_hex_prefix(value, field_name)
    number = _parse_hex(digits, field_name)
    if number >= FELT252_MAX:
        raise ValidationError(f"{field_name} exceeds felt252 range")
    return number


def validate_tick(tick: int, field_name: str) -> None:
    """Validate a tick is within the CLMM range."""
    if tick < -MAX_TICK or tick > MAX_TICK:
        raise ValidationError(f"{field_name} must be between {-MAX_TICK} and {MAX_TICK}")


def validate_tick_range(tick_lower: int, tick_upper: int) -> None:
    """Validate both ticks and ``tick_lower < tick_upper``."""
    validate_tick(tick_lower, "tick_lower")
    validate_tick(tick_upper, "tick_upper")
    if tick_lower >= tick_upper:
        raise ValidationError("tick_lower must be less than tick_upper")


def validate_secret(value: str, field_name: str) -> None:
    """Only presence is checked, never content."""
    if not value:
        raise ValidationError(f"{field_name} is required")


def validate_liquidity(value: int, field_name: str = "liquidity") -> None:
    """Liquidity must be a positive u128."""
    if value <= 0:
        raise ValidationError(f"{field_name} must be greater than zero")
    if value > U128_MASK:
        raise ValidationError(f"{field_name} exceeds u128 range")


def validate_leaf_index(value: int, field_name: str = "leaf_index") -> None:
    if value < 0:
        raise ValidationError(f"{field_name} must be non-negative")


def unsigned_tick(tick: int) -> int:
    """Map a signed tick to the circuit's unsigned representation."""
    return tick + TICK_OFFSET
