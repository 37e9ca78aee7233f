"""
Byte layout for HyperLogLog sketches.

Version 1 layout, little endian::

    magic     4 bytes   b"CHLL"
    version   uint8     1
    precision uint8     4..18
    seed      uint64    hash seed
    count     uint32    number of registers, must equal 2**precision
    registers count bytes, one register per byte in index order

Readers reject any other magic or version so that later formats fail loudly
instead of being misread.
"""

import base64
import binascii
import struct
from typing import Tuple, Union
import numpy as np # type: ignore
from cardinal.lib.bias import MIN_PRECISION, MAX_PRECISION
from cardinal.lib.errors import CorruptDataError

MAGIC = b'CHLL'
FORMAT_VERSION = 1
HEADER = struct.Struct('<4sBBQI')


def max_rank(precision: int) -> int:
    """Largest register value possible with a 64-bit hash."""
    return 64 - precision + 1


def check_state(version: int, precision: int, seed: int, registers: np.ndarray) -> np.ndarray:
    """Validate decoded sketch state.

    Args:
        version: Format version read from the input
        precision: Declared precision
        seed: Stored hash seed
        registers: Register values in index order

    Returns:
        Registers as a writable uint8 array

    Raises:
        CorruptDataError: If any field is out of range
    """
    if version != FORMAT_VERSION:
        raise CorruptDataError(f"Unsupported format version {version}")
    if not MIN_PRECISION <= precision <= MAX_PRECISION:
        raise CorruptDataError(
            f"Precision {precision} outside supported range {MIN_PRECISION}-{MAX_PRECISION}")
    if not 0 <= seed < 1 << 64:
        raise CorruptDataError(f"Seed {seed} is not an unsigned 64-bit integer")
    registers = np.asarray(registers)
    if not np.issubdtype(registers.dtype, np.integer):
        raise CorruptDataError(f"Registers must be integers, found {registers.dtype}")
    if registers.ndim != 1 or registers.shape[0] != 1 << precision:
        raise CorruptDataError(
            f"Expected {1 << precision} registers for precision {precision}, "
            f"found {registers.size}")
    if registers.size and (registers.min() < 0 or registers.max() > max_rank(precision)):
        raise CorruptDataError(
            f"Register values must lie in 0-{max_rank(precision)} for precision {precision}")
    return registers.astype(np.uint8)


def encode(precision: int, seed: int, registers: np.ndarray) -> bytes:
    """Pack sketch state into the version 1 byte layout."""
    header = HEADER.pack(MAGIC, FORMAT_VERSION, precision, seed, len(registers))
    return header + np.ascontiguousarray(registers, dtype=np.uint8).tobytes()


def decode(data: Union[bytes, bytearray, memoryview, str]) -> Tuple[int, int, np.ndarray]:
    """Unpack bytes (or base64 text) produced by ``encode``.

    Returns:
        Tuple of (precision, seed, registers)

    Raises:
        CorruptDataError: If the data is truncated, mistagged or out of range
    """
    if isinstance(data, str):
        data = decode_text(data)
    data = bytes(data)
    if len(data) < HEADER.size:
        raise CorruptDataError(
            f"Data too short for a sketch header ({len(data)} < {HEADER.size} bytes)")

    magic, version, precision, seed, count = HEADER.unpack_from(data)
    if magic != MAGIC:
        raise CorruptDataError(f"Unrecognized format tag {magic!r}")
    if version != FORMAT_VERSION:
        raise CorruptDataError(f"Unsupported format version {version}")
    if not MIN_PRECISION <= precision <= MAX_PRECISION:
        raise CorruptDataError(
            f"Precision {precision} outside supported range {MIN_PRECISION}-{MAX_PRECISION}")
    body = data[HEADER.size:]
    if count != 1 << precision:
        raise CorruptDataError(
            f"Declared register count {count} does not match precision {precision}")
    if len(body) != count:
        raise CorruptDataError(
            f"Declared register count {count} but {len(body)} register bytes present")

    registers = np.frombuffer(body, dtype=np.uint8)
    return precision, seed, check_state(version, precision, seed, registers)


def encode_text(data: bytes) -> str:
    """Base64 text form of encoded sketch bytes."""
    return base64.b64encode(data).decode('ascii')


def decode_text(text: str) -> bytes:
    """Inverse of ``encode_text``."""
    try:
        return base64.b64decode(text.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise CorruptDataError(f"Invalid base64 sketch text: {e}") from e
