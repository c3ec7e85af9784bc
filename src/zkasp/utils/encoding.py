"""Encoding and decoding utilities for field elements."""

from typing import List, Tuple, Union

U128_MASK = (1 << 128) - 1
U256_MAX = (1 << 256) - 1


def bytes_to_hex(data: bytes) -> str:
    """
    Convert bytes to hexadecimal string.

    Args:
        data: Bytes to convert

    Returns:
        str: Hexadecimal string with '0x' prefix
    """
    return "0x" + data.hex()


def hex_to_bytes(hex_str: str) -> bytes:
    """
    Convert hexadecimal string to bytes.

    Args:
        hex_str: Hexadecimal string (with or without '0x' prefix)

    Returns:
        bytes: Decoded bytes

    Raises:
        ValueError: If hex string is invalid
    """
    if hex_str.startswith(("0x", "0X")):
        hex_str = hex_str[2:]

    if len(hex_str) % 2 != 0:
        raise ValueError("Hex string must have even number of characters")

    return bytes.fromhex(hex_str)


def parse_int(value: Union[str, int]) -> int:
    """Parse a decimal or 0x-prefixed hex string into an integer."""
    if isinstance(value, int):
        return value
    value = value.strip()
    if value.startswith(("0x", "0X")):
        return int(value[2:], 16)
    return int(value, 10)


def to_field_bytes(value: Union[str, int, bytes]) -> bytes:
    """
    Normalize a field element to its 32-byte big-endian form.

    Accepts raw bytes (up to 32), an integer, or a decimal/hex string.

    Raises:
        ValueError: If the value does not fit in 256 bits
    """
    if isinstance(value, bytes):
        if len(value) > 32:
            raise ValueError("Field element must be at most 32 bytes")
        return value.rjust(32, b"\x00")
    number = parse_int(value)
    if number < 0 or number > U256_MAX:
        raise ValueError("Field element exceeds u256 range")
    return number.to_bytes(32, "big")


def field_to_hex(value: bytes) -> str:
    """Render a 32-byte field element as a minimal 0x-prefixed hex string."""
    return hex(int.from_bytes(value, "big"))


def field_to_decimal(value: bytes) -> str:
    """Render a 32-byte field element as a decimal string (prover input format)."""
    return str(int.from_bytes(value, "big"))


def u256_to_felts(value: Union[str, int]) -> Tuple[str, str]:
    """
    Split a u256 into its (low_128, high_128) felt pair, as hex strings.

    Raises:
        ValueError: If the value is negative or exceeds u256 range
    """
    number = parse_int(value)
    if number < 0 or number > U256_MAX:
        raise ValueError(f"Invalid u256 value '{value}'")
    return hex(number & U128_MASK), hex(number >> 128)


def span_calldata(values: List[str]) -> List[str]:
    """Build ``Span<felt252>`` calldata: ``[length, elem0, elem1, ...]``."""
    return [hex(len(values))] + [hex(parse_int(v)) for v in values]
