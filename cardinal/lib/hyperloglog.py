import math
import warnings
import zipfile
import zlib
from typing import Any, Iterable, Optional, Tuple, Union
import numpy as np # type: ignore
from cardinal.lib.abstractsketch import AbstractSketch, HashFunc, MASK64
from cardinal.lib import bias as bias_table
from cardinal.lib import codec
from cardinal.lib.bias import MIN_PRECISION, MAX_PRECISION
from cardinal.lib.errors import InvalidArgumentError, IncompatibleMergeError, CorruptDataError

DEFAULT_SEED = 42
HASH_BITS = 64
HASH_SPACE = float(2 ** HASH_BITS)
# Classic 2^32 / 30 cutoff scaled to the 64-bit hash space
LARGE_RANGE_THRESHOLD = HASH_SPACE / 30.0


class HyperLogLog(AbstractSketch):
    """HyperLogLog distinct-count sketch with empirical bias correction.

    Items are hashed to 64 bits. The top ``precision`` bits pick a register
    and the remaining bits give the rank (1 + leading zeros). Estimation
    switches between linear counting, bias-corrected, large-range and raw
    regimes depending on the raw estimate.

    Instances carry no locking: insert, merge and clear need exclusive
    access, estimate only needs the absence of concurrent writers. Shard
    items over ``from_template`` copies and merge them for parallel updates.
    """

    def __init__(self,
                 precision: int = 14,
                 seed: Optional[int] = None,
                 hash_func: Optional[HashFunc] = None,
                 debug: bool = False):
        """Initialize HyperLogLog sketch.

        Args:
            precision: Number of hash bits used for register indexing (4-18)
            seed: Seed for the default xxHash64 hasher
            hash_func: Optional replacement hasher returning a 64-bit integer
            debug: Whether to print debug information

        Raises:
            InvalidArgumentError: If precision or seed is out of range
        """
        super().__init__()

        if isinstance(precision, bool) or not isinstance(precision, (int, np.integer)):
            raise InvalidArgumentError(f"Precision must be an integer, got {precision!r}")
        bias_table.check_precision(int(precision))

        seed = DEFAULT_SEED if seed is None else seed
        if isinstance(seed, bool) or not isinstance(seed, (int, np.integer)) \
                or not 0 <= seed <= MASK64:
            raise InvalidArgumentError(f"Seed must be an integer in [0, 2^64), got {seed!r}")

        self.precision = int(precision)
        self.num_registers = 1 << self.precision
        self.registers = np.zeros(self.num_registers, dtype=np.uint8)
        self.seed = int(seed)
        self.hash_func = hash_func
        self.debug = debug

        self._value_bits = HASH_BITS - self.precision
        self._value_mask = (1 << self._value_bits) - 1
        self.max_rank = codec.max_rank(self.precision)

        # Calculate alpha (normalization constant)
        if self.num_registers == 16:
            self.alpha = 0.673
        elif self.num_registers == 32:
            self.alpha = 0.697
        elif self.num_registers == 64:
            self.alpha = 0.709
        else:
            self.alpha = 0.7213 / (1 + 1.079 / self.num_registers)

    @classmethod
    def from_error_rate(cls,
                        error_rate: float,
                        seed: Optional[int] = None,
                        hash_func: Optional[HashFunc] = None,
                        debug: bool = False) -> 'HyperLogLog':
        """Create a sketch sized for a target relative error.

        Precision is ceil(log2((1.04 / error_rate)^2)) clamped to the
        supported range. A clamped precision emits a UserWarning, since the
        achieved error rate then differs from the request.

        Args:
            error_rate: Target relative standard error, strictly between 0 and 1
            seed: Seed for the default hasher
            hash_func: Optional replacement hasher
            debug: Whether to print debug information

        Returns:
            Empty HyperLogLog sketch

        Raises:
            InvalidArgumentError: If error_rate is not a finite number in (0, 1)
        """
        try:
            rate = float(error_rate)
        except (TypeError, ValueError) as e:
            raise InvalidArgumentError(f"Error rate must be a number, got {error_rate!r}") from e
        if not math.isfinite(rate) or not 0.0 < rate < 1.0:
            raise InvalidArgumentError(f"Error rate must lie strictly between 0 and 1, got {rate}")

        try:
            bits = math.log2((1.04 / rate) ** 2)
        except OverflowError:
            bits = math.inf
        if math.isfinite(bits):
            precision = math.ceil(bits)
        else:
            precision = MAX_PRECISION + 1
        clamped = min(max(precision, MIN_PRECISION), MAX_PRECISION)
        if clamped != precision:
            warnings.warn(
                f"Error rate {rate} requires precision {precision}, outside the supported "
                f"range ({MIN_PRECISION}-{MAX_PRECISION}). Using precision {clamped}, "
                f"achieved error rate {1.04 / math.sqrt(1 << clamped):.5f}.",
                UserWarning)
        return cls(precision=clamped, seed=seed, hash_func=hash_func, debug=debug)

    @classmethod
    def from_template(cls, other: 'HyperLogLog') -> 'HyperLogLog':
        """Create an empty sketch with the same precision and hashing as ``other``."""
        return cls(precision=other.precision, seed=other.seed,
                   hash_func=other.hash_func, debug=other.debug)

    @property
    def error_rate(self) -> float:
        """Relative standard error implied by the register count."""
        return 1.04 / math.sqrt(self.num_registers)

    def _rho(self, value: int) -> int:
        """Rank of the non-index bits: 1 + number of leading zeros."""
        return self._value_bits - value.bit_length() + 1

    def insert_hash(self, hash_val: int) -> None:
        """Add a precomputed 64-bit hash value to the sketch."""
        hash_val = int(hash_val) & MASK64
        idx = hash_val >> self._value_bits
        rank = self._rho(hash_val & self._value_mask)
        if rank > self.registers[idx]:
            self.registers[idx] = rank

    def insert(self, item: Any) -> None:
        """Add an item to the sketch.

        Args:
            item: Any item the sketch's hasher accepts
        """
        self.insert_hash(self.hash_item(item))

    def add_batch(self, items: Iterable[Any]) -> None:
        """Add multiple items to the sketch.

        Hashing happens per item; index and rank extraction and the register
        update are vectorized.

        Args:
            items: Iterable of items to add to the sketch
        """
        hashes = np.fromiter((self.hash_item(item) for item in items), dtype=np.uint64)
        if hashes.size == 0:
            return
        idx = (hashes >> np.uint64(self._value_bits)).astype(np.intp)
        values = hashes & np.uint64(self._value_mask)
        ranks = (self._value_bits + 1 - _bit_length(values)).astype(np.uint8)
        np.maximum.at(self.registers, idx, ranks)

    def raw_estimate(self) -> float:
        """Calculate the raw cardinality estimate before corrections.

        Returns:
            alpha * m^2 / sum(2^-register)
        """
        m = float(self.num_registers)
        sum_inv = float(np.sum(np.exp2(-self.registers.astype(np.float64))))
        return self.alpha * m * m / sum_inv

    def _estimate_with_regime(self) -> Tuple[str, float, float]:
        """Return (regime name, estimate, raw estimate)."""
        m = float(self.num_registers)
        raw = self.raw_estimate()

        # Small range correction
        if raw <= 2.5 * m:
            zeros = int(np.count_nonzero(self.registers == 0))
            if zeros > 0:
                return 'linear_counting', m * math.log(m / zeros), raw

        if raw <= bias_table.bias_range(self.precision):
            return 'bias_corrected', raw - bias_table.bias(self.precision, raw), raw

        # Large range correction
        if raw > LARGE_RANGE_THRESHOLD:
            log_arg = 1.0 - raw / HASH_SPACE
            if log_arg <= 0.0:
                return 'large_range', HASH_SPACE, raw
            return 'large_range', -HASH_SPACE * math.log(log_arg), raw

        return 'raw', raw, raw

    def regime(self) -> str:
        """Name of the estimation regime ``estimate`` currently uses."""
        return self._estimate_with_regime()[0]

    def estimate(self) -> float:
        """Estimate the number of distinct items added.

        Returns:
            Non-negative cardinality estimate
        """
        regime, value, raw = self._estimate_with_regime()
        value = max(0.0, value)
        if self.debug:
            print(f"DEBUG: precision={self.precision}, raw={raw:.1f}, "
                  f"regime={regime}, estimate={value:.1f}")
        return value

    def _check_compatible(self, other: 'HyperLogLog') -> None:
        if not isinstance(other, HyperLogLog):
            raise TypeError("Can only merge with another HyperLogLog sketch")
        if self.precision != other.precision:
            raise IncompatibleMergeError(
                f"Cannot merge HyperLogLog sketches with different precisions "
                f"({self.precision} vs {other.precision})")
        if self.seed != other.seed or self.hash_func != other.hash_func:
            raise IncompatibleMergeError(
                "Cannot merge HyperLogLog sketches built with different hash functions or seeds")

    def merge(self, other: 'HyperLogLog') -> None:
        """Merge another HLL sketch into this one.

        Takes the element-wise maximum of the registers, so this sketch then
        estimates the union of both inputs.

        Args:
            other: Another HyperLogLog sketch to merge into this one

        Raises:
            TypeError: If other is not a HyperLogLog
            IncompatibleMergeError: If precision or hashing differ
        """
        self._check_compatible(other)
        np.maximum(self.registers, other.registers, out=self.registers)

    def estimate_union(self, other: 'HyperLogLog') -> float:
        """Estimate union cardinality with another sketch without modifying either."""
        self._check_compatible(other)
        merged = self.copy()
        merged.merge(other)
        return merged.estimate()

    def copy(self) -> 'HyperLogLog':
        """Independent sketch with the same configuration and registers."""
        sketch = type(self).from_template(self)
        sketch.registers = self.registers.copy()
        return sketch

    def clear(self) -> None:
        """Reset every register to zero."""
        self.registers.fill(0)

    def is_empty(self) -> bool:
        """Check if sketch is empty."""
        return not np.any(self.registers)

    def serialize(self) -> bytes:
        """Encode the sketch as bytes (see ``cardinal.lib.codec``)."""
        return codec.encode(self.precision, self.seed, self.registers)

    def serialize_text(self) -> str:
        """Encode the sketch as base64 text."""
        return codec.encode_text(self.serialize())

    @classmethod
    def deserialize(cls,
                    data: Union[bytes, bytearray, memoryview, str],
                    hash_func: Optional[HashFunc] = None,
                    debug: bool = False) -> 'HyperLogLog':
        """Rebuild a sketch from ``serialize`` or ``serialize_text`` output.

        Args:
            data: Encoded bytes or base64 text
            hash_func: Hasher to attach; must match the one used to build the sketch
            debug: Whether to print debug information

        Returns:
            HyperLogLog with the encoded precision, seed and registers

        Raises:
            CorruptDataError: If the data is malformed or out of range
        """
        precision, seed, registers = codec.decode(data)
        sketch = cls(precision=precision, seed=seed, hash_func=hash_func, debug=debug)
        sketch.registers = registers
        return sketch

    def write(self, filepath: str) -> None:
        """Write sketch to file in compressed numpy format.

        Args:
            filepath: Path to output file
        """
        np.savez_compressed(
            filepath,
            version=np.array([codec.FORMAT_VERSION]),
            registers=self.registers,
            precision=np.array([self.precision]),
            seed=np.array([self.seed], dtype=np.uint64)
        )

    @classmethod
    def load(cls,
             filepath: str,
             hash_func: Optional[HashFunc] = None,
             debug: bool = False) -> 'HyperLogLog':
        """Load sketch from a file written by ``write``.

        Args:
            filepath: Path to input file

        Returns:
            HyperLogLog object loaded from file

        Raises:
            CorruptDataError: If the file is not a readable sketch archive,
                or fields are missing or out of range
            FileNotFoundError: If the file does not exist
        """
        try:
            with np.load(filepath) as data:
                version = int(data['version'][0])
                precision = int(data['precision'][0])
                seed = int(data['seed'][0])
                registers = np.array(data['registers'])
        except FileNotFoundError:
            raise
        except (KeyError, IndexError) as e:
            raise CorruptDataError(f"Missing sketch field in {filepath}: {e}") from e
        except (OSError, ValueError, zipfile.BadZipFile, zlib.error) as e:
            raise CorruptDataError(f"Unreadable sketch file {filepath}: {e}") from e
        registers = codec.check_state(version, precision, seed, registers)
        sketch = cls(precision=precision, seed=seed, hash_func=hash_func, debug=debug)
        sketch.registers = registers
        return sketch

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HyperLogLog):
            return NotImplemented
        return (self.precision == other.precision
                and self.seed == other.seed
                and np.array_equal(self.registers, other.registers))

    def __repr__(self) -> str:
        return f"HyperLogLog(precision={self.precision}, seed={self.seed})"


def _bit_length(arr: np.ndarray) -> np.ndarray:
    """Vectorized int.bit_length for uint64 arrays.

    Each half is below 2^32 and therefore exact as float64, so frexp's
    exponent is the bit length of that half.
    """
    _, high_exp = np.frexp((arr >> np.uint64(32)).astype(np.float64))
    _, low_exp = np.frexp((arr & np.uint64(0xFFFFFFFF)).astype(np.float64))
    return np.where(high_exp > 0, high_exp + 32, low_exp).astype(np.int64)
