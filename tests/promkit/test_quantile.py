"""Tests for promkit.quantile module."""

from __future__ import annotations

import math
import random

import pytest

from promkit.exceptions import MetricValidationError
from promkit.quantile import (
    DEFAULT_OBJECTIVES,
    QuantileEpsilonPair,
    QuantileStream,
    normalize_objectives,
)


TARGETS = {0.5: 0.05, 0.9: 0.01, 0.99: 0.001}


def _shuffled(n: int, seed: int = 42) -> list[int]:
    values = list(range(n))
    random.Random(seed).shuffle(values)
    return values


class TestQuantileEpsilonPair:
    """Tests for objective validation."""

    @pytest.mark.parametrize("quantile", [0.0, 1.0, -0.1, 1.5])
    def test_quantile_out_of_range(self, quantile: float):
        """Test quantiles must lie strictly between 0 and 1."""
        with pytest.raises(MetricValidationError):
            QuantileEpsilonPair(quantile, 0.01)

    @pytest.mark.parametrize("epsilon", [-0.01, 1.0])
    def test_epsilon_out_of_range(self, epsilon: float):
        """Test epsilon must lie in [0, 1)."""
        with pytest.raises(MetricValidationError):
            QuantileEpsilonPair(0.5, epsilon)

    def test_normalize_mapping(self):
        """Test mapping objectives are sorted by quantile."""
        result = normalize_objectives({0.9: 0.01, 0.5: 0.05})
        assert result == (QuantileEpsilonPair(0.5, 0.05), QuantileEpsilonPair(0.9, 0.01))

    def test_normalize_pairs(self):
        """Test pair sequences are accepted."""
        assert normalize_objectives([(0.5, 0.05)]) == (QuantileEpsilonPair(0.5, 0.05),)

    def test_normalize_duplicates(self):
        """Test a repeated quantile is rejected."""
        with pytest.raises(MetricValidationError, match="more than once"):
            normalize_objectives([(0.5, 0.05), (0.5, 0.01)])

    def test_default_objectives(self):
        """Test default objectives."""
        assert [o.quantile for o in DEFAULT_OBJECTIVES] == [0.5, 0.9, 0.99]


class TestQuantileStream:
    """Tests for QuantileStream."""

    def test_empty_stream_returns_nan(self):
        """Test querying an empty stream."""
        stream = QuantileStream.targeted(TARGETS)
        assert math.isnan(stream.query(0.5))

    def test_small_stream_uses_raw_buffer(self):
        """Test queries before the first merge read the sorted buffer."""
        stream = QuantileStream.targeted(TARGETS, buffer_size=100)
        for value in (5.0, 1.0, 3.0, 2.0, 4.0):
            stream.insert(value)
        assert not stream.flushed
        assert stream.count == 5
        assert stream.query(0.5) == 2.0
        assert stream.query(0.99) == 4.0

    def test_targeted_rank_error(self):
        """Test answers for targets stay within twice their epsilon."""
        n = 10_000
        stream = QuantileStream.targeted(TARGETS)
        for value in _shuffled(n):
            stream.insert(float(value))

        assert stream.count == n
        for quantile, epsilon in TARGETS.items():
            rank = stream.query(quantile)
            assert (quantile - 2 * epsilon) * n <= rank <= (quantile + 2 * epsilon) * n

    def test_memory_is_bounded(self):
        """Test the compressed list stays far below the stream length."""
        stream = QuantileStream.targeted({0.5: 0.05})
        for value in _shuffled(20_000):
            stream.insert(float(value))
        stream.query(0.5)
        assert stream.sample_count < 2_000

    def test_low_biased(self):
        """Test the low-biased invariant on a low quantile."""
        n, epsilon, quantile = 5_000, 0.01, 0.1
        stream = QuantileStream.low_biased(epsilon)
        for value in _shuffled(n):
            stream.insert(float(value))
        rank = stream.query(quantile)
        assert abs(rank - quantile * n) <= 2 * epsilon * quantile * n + 1

    def test_high_biased(self):
        """Test the high-biased invariant on a high quantile."""
        n, epsilon, quantile = 5_000, 0.01, 0.9
        stream = QuantileStream.high_biased(epsilon)
        for value in _shuffled(n):
            stream.insert(float(value))
        rank = stream.query(quantile)
        assert abs(rank - quantile * n) <= 2 * epsilon * (1 - quantile) * n + 1

    def test_targeted_without_targets(self):
        """Test a stream with no targets keeps merging descending input."""
        stream = QuantileStream.targeted({}, buffer_size=10)
        for value in range(100, 0, -1):
            stream.insert(float(value))
        stream.query(0.5)
        assert stream.flushed
        assert stream.count == 100

    def test_reset(self):
        """Test reset empties the stream."""
        stream = QuantileStream.targeted(TARGETS, buffer_size=10)
        for value in range(100):
            stream.insert(float(value))
        stream.reset()
        assert stream.count == 0
        assert math.isnan(stream.query(0.5))

    def test_invalid_buffer_size(self):
        """Test a zero buffer is rejected."""
        with pytest.raises(MetricValidationError):
            QuantileStream.targeted(TARGETS, buffer_size=0)
