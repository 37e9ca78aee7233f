from __future__ import annotations
import math
import pytest # type: ignore
import numpy as np # type: ignore
from cardinal.lib.hyperloglog import HyperLogLog, HASH_SPACE
from cardinal.lib.abstractsketch import AbstractSketch
from cardinal.lib import bias as bias_table
from cardinal.lib.errors import (InvalidArgumentError, IncompatibleMergeError,
                                 HyperLogLogError)


def sketch_with_registers(precision: int, registers) -> HyperLogLog:
    """Build a sketch whose registers are set directly."""
    sketch = HyperLogLog(precision=precision)
    sketch.registers = np.asarray(registers, dtype=np.uint8)
    return sketch


@pytest.mark.quick
class TestHyperLogLogQuick:
    """Quick tests for HyperLogLog class."""

    def test_init(self):
        """Test basic initialization."""
        sketch = HyperLogLog(precision=8)
        assert sketch.precision == 8
        assert sketch.num_registers == 256
        assert sketch.registers.shape == (256,)
        assert sketch.registers.dtype == np.uint8
        assert not sketch.registers.any()
        assert sketch.seed == 42
        assert sketch.max_rank == 57
        assert isinstance(sketch, AbstractSketch)

    def test_precision_bounds(self):
        """Test precision bounds checking."""
        with pytest.raises(InvalidArgumentError):
            HyperLogLog(precision=3)
        with pytest.raises(InvalidArgumentError):
            HyperLogLog(precision=19)
        with pytest.raises(ValueError):
            HyperLogLog(precision=19)
        with pytest.raises(InvalidArgumentError):
            HyperLogLog(precision=8.0)
        with pytest.raises(InvalidArgumentError):
            HyperLogLog(precision=True)
        assert HyperLogLog(precision=np.int64(6)).num_registers == 64

    def test_seed_bounds(self):
        """Test seed range checking."""
        with pytest.raises(InvalidArgumentError):
            HyperLogLog(precision=8, seed=-1)
        with pytest.raises(InvalidArgumentError):
            HyperLogLog(precision=8, seed=2 ** 64)
        assert HyperLogLog(precision=8, seed=2 ** 64 - 1).seed == 2 ** 64 - 1

    def test_alpha(self):
        """Alpha uses the closed forms for 16, 32 and 64 registers."""
        assert HyperLogLog(precision=4).alpha == 0.673
        assert HyperLogLog(precision=5).alpha == 0.697
        assert HyperLogLog(precision=6).alpha == 0.709
        assert HyperLogLog(precision=10).alpha == pytest.approx(0.7213 / (1 + 1.079 / 1024))

    @pytest.mark.parametrize("error_rate,precision", [
        (0.01, 14),
        (0.00408, 16),
        (0.05, 9),
        (0.026, 11),
    ])
    def test_from_error_rate(self, error_rate, precision):
        """Precision is ceil(log2((1.04 / error_rate)^2))."""
        sketch = HyperLogLog.from_error_rate(error_rate)
        assert sketch.precision == precision
        assert not sketch.registers.any()
        assert sketch.error_rate == pytest.approx(1.04 / math.sqrt(2 ** precision))

    def test_from_error_rate_clamps(self):
        """Out-of-range precisions are clamped with a warning."""
        with pytest.warns(UserWarning):
            coarse = HyperLogLog.from_error_rate(0.5)
        assert coarse.precision == 4
        with pytest.warns(UserWarning):
            fine = HyperLogLog.from_error_rate(1e-4)
        assert fine.precision == 18
        with pytest.warns(UserWarning):
            tiny = HyperLogLog.from_error_rate(1e-300)
        assert tiny.precision == 18

    @pytest.mark.parametrize("error_rate", [0, 1, -0.1, float('nan'), float('inf'), 1.5, "abc", None])
    def test_invalid_error_rates(self, error_rate):
        """Invalid error rates are rejected."""
        with pytest.raises(InvalidArgumentError):
            HyperLogLog.from_error_rate(error_rate)

    def test_errors_share_base(self):
        """All sketch errors derive from HyperLogLogError."""
        with pytest.raises(HyperLogLogError):
            HyperLogLog.from_error_rate(0)

    def test_from_template(self):
        """Template copies configuration but not observed data."""
        original = HyperLogLog(precision=9, seed=7)
        original.insert("test")
        fresh = HyperLogLog.from_template(original)
        assert fresh.precision == 9
        assert fresh.seed == 7
        assert fresh.alpha == original.alpha
        assert fresh.registers.shape == original.registers.shape
        assert fresh.is_empty()
        assert not original.is_empty()

    def test_empty_estimate(self):
        """An empty sketch estimates zero."""
        sketch = HyperLogLog(precision=10)
        assert sketch.estimate() == 0.0
        assert sketch.regime() == 'linear_counting'
        assert sketch.is_empty()

    def test_insert_simple(self):
        """Three distinct items with repeats estimate three."""
        sketch = HyperLogLog.from_error_rate(0.00408)
        for key in ["test1", "test2", "test3", "test2", "test2", "test2"]:
            sketch.insert(key)
        assert round(sketch.estimate()) == 3
        assert not sketch.is_empty()
        sketch.clear()
        assert sketch.is_empty()
        assert sketch.estimate() == 0.0

    def test_repeated_insert(self):
        """Re-inserting the same item never changes the estimate."""
        sketch = HyperLogLog(precision=12)
        sketch.insert("repeat")
        single = sketch.estimate()
        registers = sketch.registers.copy()
        for _ in range(100):
            sketch.insert("repeat")
        assert sketch.estimate() == single
        np.testing.assert_array_equal(sketch.registers, registers)

    def test_monotonic_registers(self):
        """No insert ever lowers a register."""
        sketch = HyperLogLog(precision=6)
        previous = sketch.registers.copy()
        for i in range(500):
            sketch.insert(f"item{i}")
            assert np.all(sketch.registers >= previous)
            previous = sketch.registers.copy()

    def test_insert_hash_index_and_rank(self):
        """Top bits select the register, the rest give the rank."""
        sketch = HyperLogLog(precision=4)
        sketch.insert_hash((5 << 60) | (1 << 59))
        assert sketch.registers[5] == 1
        sketch.insert_hash(3 << 60)
        assert sketch.registers[3] == 61 == sketch.max_rank
        sketch.insert_hash((2 << 60) | 1)
        assert sketch.registers[2] == 60
        sketch.insert_hash((2 << 60) | (1 << 40))
        assert sketch.registers[2] == 60
        assert np.count_nonzero(sketch.registers) == 3

    def test_insert_hash_masks_to_64_bits(self):
        """Hash values are reduced modulo 2^64."""
        a = HyperLogLog(precision=8)
        b = HyperLogLog(precision=8)
        a.insert_hash(2 ** 64 + 12345)
        b.insert_hash(12345)
        assert a == b

    def test_add_batch_matches_insert(self):
        """Vectorized batch insert gives the same registers as single inserts."""
        items = [f"item{i}" for i in range(3000)] + list(range(2000)) + [1.5, b"raw", ("a", 1)]
        batched = HyperLogLog(precision=10)
        batched.add_batch(items)
        single = HyperLogLog(precision=10)
        for item in items:
            single.insert(item)
        np.testing.assert_array_equal(batched.registers, single.registers)

    def test_add_batch_extreme_hashes(self):
        """Batch rank extraction handles zero and all-ones remainders."""
        hashes = [0, 2 ** 64 - 1, 3 << 60, (2 << 60) | 1, (7 << 60) | (1 << 33)]
        batched = HyperLogLog(precision=4, hash_func=lambda h: h)
        batched.add_batch(hashes)
        single = HyperLogLog(precision=4)
        for h in hashes:
            single.insert_hash(h)
        np.testing.assert_array_equal(batched.registers, single.registers)
        assert batched.registers[0] == 61
        assert batched.registers[7] == 27

    def test_add_batch_empty(self):
        """An empty batch leaves the sketch untouched."""
        sketch = HyperLogLog(precision=8)
        sketch.add_batch([])
        assert sketch.is_empty()

    def test_custom_hash_func(self):
        """A supplied hash function replaces xxHash."""
        sketch = HyperLogLog(precision=4, hash_func=lambda item: item["id"])
        sketch.insert({"id": (5 << 60) | 1})
        assert sketch.registers[5] == 60
        masked = HyperLogLog(precision=4, hash_func=lambda item: -1)
        masked.insert("anything")
        assert masked.registers[15] == 1

    def test_debug_output(self, capsys):
        """Debug mode prints the selected regime."""
        sketch = HyperLogLog(precision=8, debug=True)
        sketch.insert("test")
        sketch.estimate()
        captured = capsys.readouterr()
        assert "DEBUG:" in captured.out
        assert "linear_counting" in captured.out

    def test_debug_output_reports_raw_once(self, capsys):
        sketch = HyperLogLog(precision=8, debug=True)
        sketch.add_batch(f"item{i}" for i in range(100))
        expected_raw = sketch.raw_estimate()
        calls = []
        original = sketch.raw_estimate

        def counting_raw_estimate():
            calls.append(1)
            return original()

        sketch.raw_estimate = counting_raw_estimate
        sketch.estimate()
        assert len(calls) == 1
        assert f"raw={expected_raw:.1f}," in capsys.readouterr().out

    def test_repr(self):
        assert repr(HyperLogLog(precision=5, seed=3)) == "HyperLogLog(precision=5, seed=3)"


@pytest.mark.quick
class TestMerge:
    """Tests for merge and union estimation."""

    def test_merge(self):
        """Merging two sketches estimates the union."""
        sketch1 = HyperLogLog.from_error_rate(0.00408)
        for key in ["test1", "test2", "test3", "test2", "test2", "test2"]:
            sketch1.insert(key)
        assert round(sketch1.estimate()) == 3

        sketch2 = HyperLogLog.from_template(sketch1)
        for key in ["test3", "test4", "test4", "test4", "test4", "test1"]:
            sketch2.insert(key)
        assert round(sketch2.estimate()) == 3

        sketch1.merge(sketch2)
        assert round(sketch1.estimate()) == 4

    def test_merge_different_precision(self):
        """Different precisions cannot be merged and nothing is changed."""
        sketch1 = HyperLogLog.from_error_rate(0.01)
        sketch2 = HyperLogLog.from_error_rate(0.05)
        sketch1.insert("a")
        sketch2.insert("b")
        before = sketch1.registers.copy()
        with pytest.raises(IncompatibleMergeError):
            sketch1.merge(sketch2)
        np.testing.assert_array_equal(sketch1.registers, before)
        with pytest.raises(ValueError):
            sketch2.merge(sketch1)

    def test_merge_different_seed(self):
        """Sketches hashed with different seeds are not comparable."""
        sketch1 = HyperLogLog(precision=8, seed=1)
        sketch2 = HyperLogLog(precision=8, seed=2)
        with pytest.raises(IncompatibleMergeError):
            sketch1.merge(sketch2)
        with pytest.raises(IncompatibleMergeError):
            sketch1.estimate_union(sketch2)

    def test_merge_different_hash_func(self):
        sketch1 = HyperLogLog(precision=8, hash_func=lambda x: 1)
        sketch2 = HyperLogLog(precision=8)
        with pytest.raises(IncompatibleMergeError):
            sketch1.merge(sketch2)

    def test_merge_same_bound_method(self):
        """Separately built sketches sharing a bound-method hasher merge."""
        class Hasher:
            def __init__(self, seed):
                self.seed = seed

            def hash(self, item):
                return (hash(item) * 0x9E3779B97F4A7C15 + self.seed) & (2 ** 64 - 1)

        hasher = Hasher(7)
        a = HyperLogLog(precision=8, hash_func=hasher.hash)
        b = HyperLogLog(precision=8, hash_func=hasher.hash)
        a.add_batch(range(100))
        b.add_batch(range(50, 150))
        a.merge(b)
        assert np.all(a.registers >= b.registers)
        restored = HyperLogLog.deserialize(a.serialize(), hash_func=hasher.hash)
        restored.merge(b)
        assert restored == a
        other = HyperLogLog(precision=8, hash_func=Hasher(7).hash)
        with pytest.raises(IncompatibleMergeError):
            a.merge(other)

    def test_merge_wrong_type(self):
        sketch = HyperLogLog(precision=8)
        with pytest.raises(TypeError):
            sketch.merge("not a sketch")

    def test_merge_identity(self, populated_sketch):
        """Merging an empty sketch is a no-op."""
        before = populated_sketch.copy()
        populated_sketch.merge(HyperLogLog.from_template(populated_sketch))
        assert populated_sketch == before

    def test_merge_idempotent(self, populated_sketch):
        """Merging a copy of itself is a no-op."""
        before = populated_sketch.copy()
        populated_sketch.merge(populated_sketch.copy())
        assert populated_sketch == before

    def test_merge_commutative(self):
        a = HyperLogLog(precision=8)
        b = HyperLogLog.from_template(a)
        a.add_batch(range(0, 600))
        b.add_batch(range(400, 1500))

        ab = a.copy()
        ab.merge(b)
        ba = b.copy()
        ba.merge(a)
        assert ab == ba

    def test_merge_associative(self):
        a = HyperLogLog(precision=8)
        b = HyperLogLog.from_template(a)
        c = HyperLogLog.from_template(a)
        a.add_batch(f"a{i}" for i in range(300))
        b.add_batch(f"b{i}" for i in range(700))
        c.add_batch(f"c{i}" for i in range(1100))

        left = a.copy()
        left.merge(b)
        left.merge(c)

        bc = b.copy()
        bc.merge(c)
        right = a.copy()
        right.merge(bc)
        assert left == right

    def test_merge_is_union(self):
        """Merged registers equal a sketch fed with both inputs."""
        a = HyperLogLog(precision=10)
        b = HyperLogLog.from_template(a)
        both = HyperLogLog.from_template(a)
        a.add_batch(f"item{i}" for i in range(2000))
        b.add_batch(f"item{i}" for i in range(1000, 4000))
        both.add_batch(f"item{i}" for i in range(4000))
        a.merge(b)
        assert a == both

    def test_estimate_union(self):
        """Union estimate leaves both operands untouched."""
        a = HyperLogLog(precision=12)
        b = HyperLogLog.from_template(a)
        a.add_batch(f"item{i}" for i in range(1000))
        b.add_batch(f"item{i}" for i in range(500, 1500))
        a_before, b_before = a.copy(), b.copy()
        union = a.estimate_union(b)
        assert a == a_before and b == b_before
        assert abs(union - 1500) / 1500 < 0.1

    def test_copy_is_independent(self, populated_sketch):
        duplicate = populated_sketch.copy()
        assert duplicate == populated_sketch
        duplicate.insert("one more distinct item")
        duplicate.registers[0] = duplicate.max_rank
        assert duplicate != populated_sketch

    def test_copy_keeps_subclass(self):
        class LabelledHyperLogLog(HyperLogLog):
            pass

        sketch = LabelledHyperLogLog(precision=6, seed=9)
        sketch.insert("x")
        duplicate = sketch.copy()
        assert type(duplicate) is LabelledHyperLogLog
        assert duplicate == sketch
        assert duplicate.seed == 9


@pytest.mark.quick
class TestRegimes:
    """Each estimation regime on hand-built register states."""

    def test_linear_counting(self):
        sketch = sketch_with_registers(4, [1] * 8 + [0] * 8)
        # Z = 8 * 0.5 + 8 = 12, raw = 0.673 * 256 / 12
        assert sketch.raw_estimate() == pytest.approx(0.673 * 256 / 12)
        assert sketch.regime() == 'linear_counting'
        assert sketch.estimate() == pytest.approx(16 * math.log(2))

    def test_no_zero_registers_skips_linear_counting(self):
        sketch = sketch_with_registers(4, [1] * 16)
        raw = sketch.raw_estimate()
        assert raw <= 2.5 * 16
        assert sketch.regime() == 'bias_corrected'
        assert sketch.estimate() == pytest.approx(raw - bias_table.bias(4, raw))

    def test_bias_corrected(self):
        sketch = sketch_with_registers(4, [2] * 16)
        raw = sketch.raw_estimate()
        assert raw == pytest.approx(0.673 * 256 / 4)
        assert 2.5 * 16 < raw <= 5 * 16
        assert sketch.regime() == 'bias_corrected'
        assert sketch.estimate() == pytest.approx(raw - bias_table.bias(4, raw))

    def test_raw(self):
        sketch = sketch_with_registers(4, [3] * 16)
        raw = sketch.raw_estimate()
        assert raw == pytest.approx(0.673 * 256 / 2)
        assert sketch.regime() == 'raw'
        assert sketch.estimate() == raw

    def test_large_range(self):
        sketch = sketch_with_registers(4, [58] * 16)
        raw = sketch.raw_estimate()
        assert raw > HASH_SPACE / 30
        assert sketch.regime() == 'large_range'
        assert sketch.estimate() == pytest.approx(-HASH_SPACE * math.log(1 - raw / HASH_SPACE))
        assert sketch.estimate() > raw

    def test_large_range_saturates(self):
        sketch = sketch_with_registers(4, [61] * 16)
        assert sketch.raw_estimate() >= HASH_SPACE
        assert sketch.estimate() == HASH_SPACE

    def test_estimate_is_read_only(self, populated_sketch):
        before = populated_sketch.copy()
        first = populated_sketch.estimate()
        assert populated_sketch.estimate() == first
        assert populated_sketch == before


@pytest.mark.full
class TestHyperLogLogFull:
    """Full tests for HyperLogLog class."""

    @pytest.mark.parametrize("n_items", [10, 100, 1000, 10000, 30000, 60000, 100000])
    def test_cardinality_accuracy(self, n_items):
        """Estimates stay close to the true count across regimes."""
        sketch = HyperLogLog.from_error_rate(0.01)
        sketch.add_batch(f"item{i}" for i in range(n_items))
        error = abs(sketch.estimate() - n_items) / n_items
        assert error < 4 * sketch.error_rate

    def test_different_seeds(self):
        """Different seeds give different registers but similar estimates."""
        sketch1 = HyperLogLog(precision=8, seed=1)
        sketch2 = HyperLogLog(precision=8, seed=2)
        for i in range(1000):
            s = str(i)
            sketch1.insert(s)
            sketch2.insert(s)
        assert not np.array_equal(sketch1.registers, sketch2.registers)
        card1 = sketch1.estimate()
        card2 = sketch2.estimate()
        error = abs(card1 - card2) / max(card1, card2)
        assert error < 0.3, f"Error between sketches with different seeds too large: {error:.3f}"

    def test_sharded_merge_matches_single(self):
        """Items partitioned over template copies merge into the same state."""
        whole = HyperLogLog.from_error_rate(0.02)
        shards = [HyperLogLog.from_template(whole) for _ in range(4)]
        for i in range(20000):
            item = f"user{i}"
            whole.insert(item)
            shards[i % 4].insert(item)
        merged = HyperLogLog.from_template(whole)
        for shard in shards:
            merged.merge(shard)
        assert merged == whole
        assert merged.estimate() == whole.estimate()


@pytest.mark.slow
class TestAccuracyTrials:
    """Repeated trials over independent seeds."""

    @pytest.mark.parametrize("n_items", [500, 2000, 4000, 20000])
    def test_error_bound_over_trials(self, n_items):
        trials = 20
        within = 0
        for seed in range(1, trials + 1):
            sketch = HyperLogLog(precision=10, seed=seed)
            sketch.add_batch(f"item{i}" for i in range(n_items))
            error = abs(sketch.estimate() - n_items) / n_items
            if error <= 2 * sketch.error_rate:
                within += 1
        assert within / trials >= 0.8
