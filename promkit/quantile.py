"""Biased streaming quantile estimation.

Implements the algorithm from "Effective Computation of Biased Quantiles
over Data Streams" (Cormode, Korn, Muthukrishnan, Srivastava). Raw values
are collected in a small buffer; when the buffer fills it is sorted and
merged into a compressed list of ``(value, width, delta)`` samples whose
size grows sub-linearly with the number of observations.

The invariant function decides how much rank error a sample at rank ``r``
may carry. Three flavours are provided:

- low-biased: ``2 * epsilon * r``, accurate for small quantiles
- high-biased: ``2 * epsilon * (N - r)``, accurate for large quantiles
- targeted: the tightest bound over a fixed set of ``(quantile, epsilon)``
  objectives, used by Summary metrics

Example:
    >>> stream = QuantileStream.targeted(DEFAULT_OBJECTIVES)
    >>> for i in range(1, 1001):
    ...     stream.insert(float(i))
    >>> median = stream.query(0.5)  # within 450..550
"""

from __future__ import annotations

import math
import sys
from collections.abc import Mapping
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from promkit.exceptions import MetricValidationError


if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

    Invariant = Callable[["SampleStream", float], float]


DEFAULT_BUFFER_SIZE = 500


@dataclass(frozen=True, slots=True)
class QuantileEpsilonPair:
    """A target quantile and its allowed absolute rank error.

    Attributes:
        quantile: Target quantile, strictly between 0 and 1.
        epsilon: Allowed error, e.g. 0.05 means the returned value has a
            true quantile within ``quantile ± 0.05``.
    """

    quantile: float
    epsilon: float

    def __post_init__(self) -> None:
        if not 0.0 < self.quantile < 1.0:
            raise MetricValidationError(
                f"Quantile must be between 0 and 1 (exclusive), got {self.quantile}",
                details={"quantile": self.quantile},
            )
        if not 0.0 <= self.epsilon < 1.0:
            raise MetricValidationError(
                f"Epsilon must be in [0, 1), got {self.epsilon}",
                details={"quantile": self.quantile, "epsilon": self.epsilon},
            )


DEFAULT_OBJECTIVES: tuple[QuantileEpsilonPair, ...] = (
    QuantileEpsilonPair(0.5, 0.05),
    QuantileEpsilonPair(0.9, 0.05),
    QuantileEpsilonPair(0.99, 0.001),
)


def normalize_objectives(objectives: Any) -> tuple[QuantileEpsilonPair, ...]:
    """Convert objectives to a tuple of QuantileEpsilonPair sorted by quantile.

    Accepts a mapping ``{quantile: epsilon}``, an iterable of pairs or an
    iterable of QuantileEpsilonPair.

    Raises:
        MetricValidationError: If a quantile repeats or a pair is invalid.
    """
    items: Iterable[Any] = objectives.items() if isinstance(objectives, Mapping) else objectives
    pairs: list[QuantileEpsilonPair] = []
    for item in items:
        if isinstance(item, QuantileEpsilonPair):
            pairs.append(item)
        else:
            quantile, epsilon = item
            pairs.append(QuantileEpsilonPair(float(quantile), float(epsilon)))

    pairs.sort(key=lambda p: p.quantile)
    for previous, current in zip(pairs, pairs[1:]):
        if previous.quantile == current.quantile:
            raise MetricValidationError(
                f"Quantile {current.quantile} is declared more than once",
                details={"quantile": current.quantile},
            )
    return tuple(pairs)


# =============================================================================
# Compressed Samples
# =============================================================================


@dataclass(slots=True)
class Sample:
    """One compressed sample.

    Attributes:
        value: Observed value.
        width: Number of observations folded into this sample.
        delta: Maximum rank uncertainty of this sample.
    """

    value: float
    width: float = 1.0
    delta: float = 0.0


class SampleStream:
    """Rank-ordered compressed samples plus the total observation count."""

    def __init__(self, invariant: Invariant) -> None:
        self.n = 0.0
        self._samples: list[Sample] = []
        self._invariant = invariant

    @property
    def count(self) -> int:
        return int(self.n)

    @property
    def sample_count(self) -> int:
        """Number of compressed samples currently held."""
        return len(self._samples)

    def merge(self, batch: Sequence[Sample]) -> None:
        """Merge a batch of samples sorted by value, then compress.

        Each new sample is inserted before the first stored sample with a
        greater value. Its delta is the larger of its own delta and
        ``floor(invariant(r)) - 1`` at the insertion rank, except when it is
        appended at the end where the rank is exact.
        """
        samples = self._samples
        rank = 0.0
        i = 0
        for sample in batch:
            while i < len(samples):
                current = samples[i]
                if current.value > sample.value:
                    delta = max(sample.delta, math.floor(self._invariant(self, rank)) - 1)
                    samples.insert(i, Sample(sample.value, sample.width, delta))
                    break
                rank += current.width
                i += 1
            else:
                samples.append(Sample(sample.value, sample.width, 0.0))
            i += 1
            self.n += sample.width
            rank += sample.width

        self._compress()

    def _compress(self) -> None:
        samples = self._samples
        if len(samples) < 2:
            return

        x = samples[-1]
        rank = self.n - 1 - x.width
        for i in range(len(samples) - 2, -1, -1):
            current = samples[i]
            if current.width + x.width + x.delta <= self._invariant(self, rank):
                x.width += current.width
                del samples[i]
            else:
                x = current
            rank -= current.width

    def query(self, q: float) -> float:
        """Return the value whose rank best matches quantile ``q``."""
        if not self._samples:
            return math.nan

        target = math.ceil(q * self.n)
        target += math.ceil(self._invariant(self, target) / 2)
        previous = self._samples[0]
        rank = 0.0
        for current in self._samples[1:]:
            rank += previous.width
            if rank + current.width + current.delta > target:
                return previous.value
            previous = current
        return previous.value

    def reset(self) -> None:
        self._samples.clear()
        self.n = 0.0


# =============================================================================
# Quantile Stream
# =============================================================================


class QuantileStream:
    """Approximate quantiles over an unbounded stream in bounded memory.

    Not thread-safe; Summary children serialize access under their own lock.

    Args:
        invariant: Error bound function ``(stream, rank) -> allowed error``.
        buffer_size: Raw values kept before a merge is triggered.
    """

    def __init__(self, invariant: Invariant, buffer_size: int = DEFAULT_BUFFER_SIZE) -> None:
        if buffer_size < 1:
            raise MetricValidationError(
                f"buffer_size must be at least 1, got {buffer_size}",
                details={"buffer_size": buffer_size},
            )
        self._stream = SampleStream(invariant)
        self._buffer: list[Sample] = []
        self._buffer_size = buffer_size
        self._sorted = True

    @classmethod
    def low_biased(cls, epsilon: float, buffer_size: int = DEFAULT_BUFFER_SIZE) -> QuantileStream:
        """Stream with relative error ``epsilon`` that favours low ranks.

        A value returned for quantile ``q`` has a true quantile within
        ``(1 ± epsilon) * q``.
        """
        return cls(lambda stream, r: 2 * epsilon * r, buffer_size)

    @classmethod
    def high_biased(cls, epsilon: float, buffer_size: int = DEFAULT_BUFFER_SIZE) -> QuantileStream:
        """Stream with relative error ``epsilon`` that favours high ranks.

        A value returned for quantile ``q`` has a true quantile within
        ``1 - (1 ± epsilon) * (1 - q)``.
        """
        return cls(lambda stream, r: 2 * epsilon * (stream.n - r), buffer_size)

    @classmethod
    def targeted(
        cls,
        targets: Any,
        buffer_size: int = DEFAULT_BUFFER_SIZE,
    ) -> QuantileStream:
        """Stream tuned for quantiles known in advance.

        Args:
            targets: Objectives as accepted by normalize_objectives().
            buffer_size: Raw values kept before a merge is triggered.

        Returns:
            A stream whose answers for the target quantiles are within the
            paired epsilon. Other quantiles give unspecified results.
        """
        objectives = normalize_objectives(targets)

        def invariant(stream: SampleStream, r: float) -> float:
            bound = sys.float_info.max
            n = stream.n
            for target in objectives:
                if target.quantile * n <= r:
                    f = 2 * target.epsilon * r / target.quantile
                else:
                    f = 2 * target.epsilon * (n - r) / (1 - target.quantile)
                if f < bound:
                    bound = f
            return bound

        return cls(invariant, buffer_size)

    @property
    def count(self) -> int:
        """Total number of values inserted since the last reset."""
        return len(self._buffer) + self._stream.count

    @property
    def flushed(self) -> bool:
        """Whether any values have been merged into the compressed list."""
        return self._stream.sample_count > 0

    @property
    def sample_count(self) -> int:
        """Compressed samples currently held; bounded for long streams."""
        return self._stream.sample_count

    def insert(self, value: float) -> None:
        self._buffer.append(Sample(value))
        self._sorted = False
        if len(self._buffer) >= self._buffer_size:
            self._flush()

    def _flush(self) -> None:
        self._maybe_sort()
        self._stream.merge(self._buffer)
        self._buffer.clear()

    def _maybe_sort(self) -> None:
        if not self._sorted:
            self._buffer.sort(key=lambda s: s.value)
            self._sorted = True

    def query(self, q: float) -> float:
        """Return the approximate value at quantile ``q``.

        While nothing has been merged yet the answer comes straight from the
        sorted raw buffer. Returns NaN for an empty stream.
        """
        if not self.flushed:
            length = len(self._buffer)
            if length == 0:
                return math.nan
            i = int(length * q)
            if i > 0:
                i -= 1
            self._maybe_sort()
            return self._buffer[i].value

        self._flush()
        return self._stream.query(q)

    def reset(self) -> None:
        """Discard every value."""
        self._stream.reset()
        self._buffer.clear()
        self._sorted = True
