import pytest # type: ignore
import numpy as np # type: ignore
from cardinal.lib import bias as bias_table
from cardinal.lib.bias_data import RAW_ESTIMATE_DATA, BIAS_DATA
from cardinal.lib.errors import InvalidArgumentError


def manual_bias(precision, raw_estimate, k=6):
    """Reference k-nearest-neighbour mean computed with plain Python."""
    estimates = RAW_ESTIMATE_DATA[precision - 4]
    biases = BIAS_DATA[precision - 4]
    ranked = sorted(range(len(estimates)), key=lambda i: ((raw_estimate - estimates[i]) ** 2, i))
    return sum(biases[i] for i in ranked[:k]) / k


@pytest.mark.quick
class TestBiasTableQuick:
    """Quick tests for the bias correction table."""

    def test_supported_precisions(self):
        assert bias_table.supported_precisions() == range(4, 19)
        assert bias_table.MIN_PRECISION == 4
        assert bias_table.MAX_PRECISION == 18
        assert len(RAW_ESTIMATE_DATA) == len(BIAS_DATA) == 15

    def test_rows_are_paired(self):
        """Every raw estimate sample has a measured bias."""
        for precision in bias_table.supported_precisions():
            estimates, biases = bias_table.calibration_rows(precision)
            assert estimates.shape == biases.shape
            assert estimates.shape[0] >= 79
            # samples cover the range up to five times the register count
            assert estimates[0] < 1 << precision
            assert estimates[-1] > 4 * (1 << precision)

    def test_rows_are_read_only(self):
        estimates, biases = bias_table.calibration_rows(10)
        with pytest.raises(ValueError):
            estimates[0] = 0.0
        with pytest.raises(ValueError):
            biases[0] = 0.0

    @pytest.mark.parametrize("precision,raw_estimate", [
        (4, 11.0),
        (4, 43.072),
        (10, 800.0),
        (10, 3000.5),
        (14, 12015.0046),
        (14, 60000.0),
        (18, 1000000.0),
    ])
    def test_bias_is_neighbour_mean(self, precision, raw_estimate):
        assert bias_table.bias(precision, raw_estimate) == pytest.approx(
            manual_bias(precision, raw_estimate))

    def test_bias_beyond_table_uses_edge_samples(self):
        """Queries past either end average the outermost samples."""
        estimates, biases = bias_table.calibration_rows(12)
        assert bias_table.bias(12, 0.0) == pytest.approx(float(np.mean(biases[:6])))
        assert bias_table.bias(12, 1e9) == pytest.approx(manual_bias(12, 1e9))

    def test_nearest_neighbors(self):
        estimates = np.array([1.0, 2.0, 3.0, 10.0, 11.0, 12.0, 13.0, 50.0])
        nearest = bias_table.nearest_neighbors(11.2, estimates)
        assert len(nearest) == 6
        assert set(nearest.tolist()) == {2, 3, 4, 5, 6, 1}
        assert nearest[0] == 4

    def test_bias_shrinks_with_estimate(self):
        """Bias is largest for small raw estimates."""
        for precision in (8, 12, 16):
            m = 1 << precision
            assert bias_table.bias(precision, 0.8 * m) > bias_table.bias(precision, 4.5 * m)

    def test_bias_range(self):
        assert bias_table.bias_range(4) == 80.0
        assert bias_table.bias_range(14) == 5.0 * 16384

    def test_unsupported_precision(self):
        with pytest.raises(InvalidArgumentError):
            bias_table.bias(3, 10.0)
        with pytest.raises(InvalidArgumentError):
            bias_table.bias(19, 10.0)
        with pytest.raises(InvalidArgumentError):
            bias_table.bias_range(2)
