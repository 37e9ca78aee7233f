from __future__ import annotations
import struct
from abc import ABC, abstractmethod
from typing import Any, Callable, Iterable, Optional, Protocol, runtime_checkable
import numpy as np # type: ignore
import xxhash # type: ignore

MASK64 = (1 << 64) - 1

HashFunc = Callable[[Any], int]


@runtime_checkable
class SupportsHash64(Protocol):
    """Items that know how to produce their own stable 64-bit hash."""

    def hash64(self, seed: int) -> int:
        ...


class AbstractSketch(ABC):
    """Base class for cardinality sketches over arbitrary hashable items."""

    @abstractmethod
    def insert(self, item: Any) -> None:
        """Add one item to the sketch."""
        pass

    @abstractmethod
    def add_batch(self, items: Iterable[Any]) -> None:
        """Add multiple items to the sketch.

        Args:
            items: Iterable of items to add to the sketch
        """
        pass

    @abstractmethod
    def estimate(self) -> float:
        """Estimate the number of distinct items added so far."""
        pass

    @abstractmethod
    def merge(self, other: 'AbstractSketch') -> None:
        """Merge another sketch into this one."""
        pass

    # Hash functions - static methods for use by all sketch implementations
    @staticmethod
    def _hash64_bytes(data: bytes, seed: int = 0) -> int:
        """64-bit xxHash of a byte string.

        Args:
            data: Bytes to hash
            seed: Seed for hashing

        Returns:
            64-bit hash value as integer
        """
        hasher = xxhash.xxh64(seed=seed)
        hasher.update(data)
        return hasher.intdigest()

    @staticmethod
    def _hash64_int(x: int, seed: int = 0) -> int:
        """64-bit hash function for integers.

        Integers are encoded as signed little-endian, using at least eight
        bytes so that the common case matches a fixed-width encoding.

        Args:
            x: Integer value to hash
            seed: Seed for hashing

        Returns:
            64-bit hash value as integer
        """
        length = max(8, (x.bit_length() + 8) // 8)
        return AbstractSketch._hash64_bytes(
            x.to_bytes(length, byteorder='little', signed=True), seed)

    @staticmethod
    def _hash64_item(item: Any, seed: int = 0) -> int:
        """Hash an arbitrary item to 64 bits via its canonical byte encoding.

        Args:
            item: bytes-like, str, int, float, tuple of those, or an object
                  implementing ``hash64(seed)``
            seed: Seed for hashing

        Returns:
            64-bit hash value as integer

        Raises:
            TypeError: If the item has no canonical encoding
        """
        if isinstance(item, SupportsHash64):
            return int(item.hash64(seed)) & MASK64
        if isinstance(item, (bytes, bytearray, memoryview)):
            return AbstractSketch._hash64_bytes(bytes(item), seed)
        if isinstance(item, str):
            return AbstractSketch._hash64_bytes(item.encode('utf-8'), seed)
        if isinstance(item, (int, np.integer)):
            return AbstractSketch._hash64_int(int(item), seed)
        if isinstance(item, (float, np.floating)):
            return AbstractSketch._hash64_bytes(struct.pack('<d', float(item)), seed)
        if isinstance(item, tuple):
            parts = b''.join(
                AbstractSketch._hash64_item(part, seed).to_bytes(8, byteorder='little')
                for part in item
            )
            return AbstractSketch._hash64_bytes(parts, seed)
        raise TypeError(f"Cannot hash item of type {type(item).__name__}; "
                        f"pass a hash_func or implement hash64(seed)")

    # Instance methods that use the sketch's seed and hash_func (if available)
    def hash_item(self, item: Any) -> int:
        """Instance method to hash an item using the instance's seed or hash_func.

        Args:
            item: Item to hash

        Returns:
            64-bit hash value as integer
        """
        hash_func: Optional[HashFunc] = getattr(self, 'hash_func', None)
        if hash_func is not None:
            return int(hash_func(item)) & MASK64
        seed = getattr(self, 'seed', 0)
        return self._hash64_item(item, seed=seed)
