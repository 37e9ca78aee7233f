from __future__ import annotations
import os
import tempfile
import pytest # type: ignore
import numpy as np # type: ignore
from cardinal.lib.hyperloglog import HyperLogLog
from cardinal.lib import codec
from cardinal.lib.errors import CorruptDataError


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdirname:
        yield tmpdirname


def encoded(precision=4, registers=None, magic=codec.MAGIC, version=codec.FORMAT_VERSION,
            seed=42, count=None):
    """Hand-built sketch bytes for corruption tests."""
    if registers is None:
        registers = bytes(1 << precision)
    if count is None:
        count = len(registers)
    return codec.HEADER.pack(magic, version, precision, seed, count) + bytes(registers)


@pytest.mark.quick
class TestSketchesIOQuick:
    """Quick tests for sketch serialization."""

    def test_serialize_round_trip(self, populated_sketch):
        data = populated_sketch.serialize()
        restored = HyperLogLog.deserialize(data)
        assert restored == populated_sketch
        assert restored.precision == populated_sketch.precision
        assert restored.seed == populated_sketch.seed
        np.testing.assert_array_equal(restored.registers, populated_sketch.registers)
        assert restored.estimate() == populated_sketch.estimate()

    def test_text_round_trip(self, populated_sketch):
        text = populated_sketch.serialize_text()
        assert isinstance(text, str)
        restored = HyperLogLog.deserialize(text)
        assert restored == populated_sketch
        assert restored.estimate() == populated_sketch.estimate()

    def test_empty_round_trip(self):
        sketch = HyperLogLog(precision=18, seed=2 ** 64 - 1)
        restored = HyperLogLog.deserialize(sketch.serialize())
        assert restored == sketch
        assert restored.estimate() == 0.0

    def test_layout(self):
        sketch = HyperLogLog(precision=6, seed=5)
        sketch.insert_hash(3 << 58)
        data = sketch.serialize()
        assert data[:4] == b"CHLL"
        assert data[4] == codec.FORMAT_VERSION
        assert data[5] == 6
        assert len(data) == codec.HEADER.size + 64
        magic, version, precision, seed, count = codec.HEADER.unpack_from(data)
        assert (seed, count) == (5, 64)
        assert data[codec.HEADER.size + 3] == 59

    def test_deserialized_sketch_is_mutable(self, populated_sketch):
        restored = HyperLogLog.deserialize(bytearray(populated_sketch.serialize()))
        restored.add_batch(f"new{i}" for i in range(5000))
        restored.merge(populated_sketch)
        assert restored.estimate() > populated_sketch.estimate()

    def test_deserialize_attaches_hash_func(self):
        hash_func = lambda item: item
        sketch = HyperLogLog(precision=8, hash_func=hash_func)
        sketch.insert(12345)
        restored = HyperLogLog.deserialize(sketch.serialize(), hash_func=hash_func)
        restored.merge(sketch)
        assert restored == sketch

    def test_hyperloglog_io(self, temp_dir):
        """Test HyperLogLog write/load functionality."""
        hll = HyperLogLog(precision=8, seed=11)
        hll.insert("ACGTACGT")

        filepath = os.path.join(temp_dir, "test_hll.npz")
        hll.write(filepath)
        hll2 = HyperLogLog.load(filepath)

        assert hll.precision == hll2.precision
        assert hll.seed == hll2.seed
        np.testing.assert_array_equal(hll.registers, hll2.registers)
        assert hll2.registers.dtype == np.uint8
        assert abs(hll.estimate() - hll2.estimate()) < 1e-10


@pytest.mark.quick
class TestCorruptData:
    """Malformed input is rejected with CorruptDataError."""

    def test_valid_hand_built(self):
        sketch = HyperLogLog.deserialize(encoded())
        assert sketch.precision == 4
        assert sketch.is_empty()

    def test_too_short(self):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(b"CHLL\x01")
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(b"")

    def test_unknown_tag(self):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(magic=b"XHLL"))

    def test_unknown_version(self):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(version=2))

    @pytest.mark.parametrize("precision", [3, 19, 0])
    def test_unsupported_precision(self, precision):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(precision=precision, registers=bytes(16)))

    def test_count_mismatch(self):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(precision=5, registers=bytes(16)))

    def test_truncated_registers(self):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(precision=4, registers=bytes(15), count=16))
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(precision=4, registers=bytes(17), count=16))

    def test_register_out_of_range(self):
        registers = bytearray(16)
        registers[3] = 62
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize(encoded(precision=4, registers=registers))
        registers[3] = 61
        assert HyperLogLog.deserialize(encoded(precision=4, registers=registers)).registers[3] == 61

    def test_invalid_text(self):
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize("not base64!!")
        with pytest.raises(CorruptDataError):
            HyperLogLog.deserialize("Q0hMTA==")
        with pytest.raises(ValueError):
            HyperLogLog.deserialize("é")

    def test_load_missing_field(self, temp_dir):
        filepath = os.path.join(temp_dir, "partial.npz")
        np.savez_compressed(filepath, registers=np.zeros(16, dtype=np.uint8),
                            precision=np.array([4]), version=np.array([1]))
        with pytest.raises(CorruptDataError):
            HyperLogLog.load(filepath)

    @pytest.mark.parametrize("registers", [
        np.zeros(32, dtype=np.uint8),
        np.full(16, 70, dtype=np.uint8),
        np.full(16, -1, dtype=np.int64),
        np.zeros(16, dtype=np.float64),
    ])
    def test_load_bad_registers(self, temp_dir, registers):
        filepath = os.path.join(temp_dir, "bad.npz")
        np.savez_compressed(filepath, registers=registers, precision=np.array([4]),
                            seed=np.array([42], dtype=np.uint64), version=np.array([1]))
        with pytest.raises(CorruptDataError):
            HyperLogLog.load(filepath)

    def test_load_not_an_archive(self, temp_dir):
        filepath = os.path.join(temp_dir, "garbage.npz")
        with open(filepath, "wb") as fh:
            fh.write(b"this is not a sketch file at all")
        with pytest.raises(CorruptDataError):
            HyperLogLog.load(filepath)

    def test_load_truncated_archive(self, temp_dir, populated_sketch):
        filepath = os.path.join(temp_dir, "truncated.npz")
        populated_sketch.write(filepath)
        with open(filepath, "rb") as fh:
            data = fh.read()
        with open(filepath, "wb") as fh:
            fh.write(data[:len(data) // 2])
        with pytest.raises(CorruptDataError):
            HyperLogLog.load(filepath)

    def test_load_negative_seed(self, temp_dir):
        filepath = os.path.join(temp_dir, "negative_seed.npz")
        np.savez_compressed(filepath, registers=np.zeros(16, dtype=np.uint8),
                            precision=np.array([4]), seed=np.array([-5]),
                            version=np.array([1]))
        with pytest.raises(CorruptDataError):
            HyperLogLog.load(filepath)

    def test_load_missing_file(self, temp_dir):
        with pytest.raises(FileNotFoundError):
            HyperLogLog.load(os.path.join(temp_dir, "absent.npz"))

    def test_check_state_seed_range(self):
        registers = np.zeros(16, dtype=np.uint8)
        assert codec.check_state(1, 4, 2 ** 64 - 1, registers).dtype == np.uint8
        with pytest.raises(CorruptDataError):
            codec.check_state(1, 4, 2 ** 64, registers)
        with pytest.raises(CorruptDataError):
            codec.check_state(1, 4, -1, registers)
