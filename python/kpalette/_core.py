"""K-means clustering over RGBA samples.

Samples are rows of an ``(n, 4)`` float array with channels in the [0, 1]
range. Conversion from 8-bit values happens once, in :func:`samples_from_rgba8`.
"""

from __future__ import annotations

import logging
import math
import random
import threading
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Literal

import numpy as np

logger = logging.getLogger(__name__)

DEFAULT_CLUSTER_COUNT = 3
DEFAULT_TOLERANCE = 0.01
DEFAULT_MAX_ITERATIONS = 300
DEFAULT_SEEDING = "stratified"

Seeding = Literal["stratified", "uniform"]


class KPaletteError(Exception):
    """Base class for errors raised by kpalette."""


class InsufficientSamplesError(KPaletteError, ValueError):
    """Raised when there are fewer samples than requested clusters."""

    def __init__(self, requested: int, available: int) -> None:
        super().__init__(f"cannot form {requested} clusters from {available} samples")
        self.requested = requested
        self.available = available


class ClusteringCancelled(KPaletteError):
    """Raised when the cancel event is set while k-means is running."""


@dataclass(frozen=True, slots=True)
class Sample:
    """A single RGBA color reading with channels in the [0, 1] range."""

    r: float
    g: float
    b: float
    a: float


def samples_from_rgba8(buf: bytes) -> np.ndarray:
    """Convert a row-major buffer of 8-bit RGBA pixels to an ``(n, 4)`` float array."""
    return np.frombuffer(buf, dtype=np.uint8).reshape(-1, 4) / 255


def distance(p: Sample, q: Sample) -> float:
    """Euclidean distance across all four channels."""
    dr = p.r - q.r
    dg = p.g - q.g
    db = p.b - q.b
    da = p.a - q.a
    return math.sqrt(dr * dr + dg * dg + db * db + da * da)


@dataclass(frozen=True, slots=True)
class Centroid:
    """The average of one cluster after an assignment pass.

    Attributes:
        color: Mean color of the members, or ``None`` if the cluster is empty.
        count: Number of samples assigned to the cluster in the pass.
    """

    color: Sample | None
    count: int

    @property
    def empty(self) -> bool:
        return self.color is None


@dataclass(slots=True)
class Accumulator:
    r: float = 0.0
    g: float = 0.0
    b: float = 0.0
    a: float = 0.0
    count: int = 0

    def add(self, sample: Sample) -> None:
        self.r += sample.r
        self.g += sample.g
        self.b += sample.b
        self.a += sample.a
        self.count += 1

    def finalize(self) -> Centroid:
        if self.count == 0:
            return Centroid(color=None, count=0)
        n = self.count
        return Centroid(color=Sample(self.r / n, self.g / n, self.b / n, self.a / n), count=n)


@dataclass(frozen=True, slots=True)
class KMeansResult:
    """Outcome of a :func:`kmeans` run.

    Attributes:
        centroids: Exactly ``k`` centroids, in seed order.
        iterations: Number of assignment passes performed.
        converged: ``False`` if the run was cut off by ``max_iterations``.
    """

    centroids: list[Centroid]
    iterations: int
    converged: bool


def validate_config(k: int, tolerance: float, max_iterations: int, seeding: str) -> None:
    if k < 1:
        raise ValueError(f"cluster count must be at least 1, got {k}")
    if not tolerance >= 0:
        raise ValueError(f"tolerance must be non-negative, got {tolerance}")
    if max_iterations < 1:
        raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
    if seeding not in ("stratified", "uniform"):
        raise ValueError(f"unknown seeding strategy {seeding!r}")


def _as_array(entries: np.ndarray | Sequence[Sample]) -> np.ndarray:
    if isinstance(entries, np.ndarray):
        data = np.asarray(entries, dtype=np.float64)
        if data.ndim != 2 or data.shape[1] != 4:
            raise ValueError(f"expected an (n, 4) sample array, got shape {data.shape}")
        return data
    return np.array([(s.r, s.g, s.b, s.a) for s in entries], dtype=np.float64).reshape(-1, 4)


def _seed_indices(n: int, k: int, seeding: Seeding, rng: random.Random) -> list[int]:
    if seeding == "uniform":
        return [rng.randrange(n) for _ in range(k)]
    # one draw per contiguous band of the index range
    return [rng.randrange(i * n // k, (i + 1) * n // k) for i in range(k)]


def _assign(data: np.ndarray, positions: list[Sample]) -> np.ndarray:
    """Label every sample with the index of its nearest position.

    ``np.argmin`` returns the first minimum, so ties go to the lowest index.
    """
    distances_sq = np.empty((len(data), len(positions)))
    for j, p in enumerate(positions):
        diff = data - (p.r, p.g, p.b, p.a)
        distances_sq[:, j] = np.einsum("ij,ij->i", diff, diff)
    return np.argmin(distances_sq, axis=1)


def _accumulate(data: np.ndarray, labels: np.ndarray, k: int) -> list[Accumulator]:
    counts = np.bincount(labels, minlength=k)
    sums = [np.bincount(labels, weights=data[:, c], minlength=k) for c in range(4)]
    return [
        Accumulator(
            float(sums[0][j]),
            float(sums[1][j]),
            float(sums[2][j]),
            float(sums[3][j]),
            int(counts[j]),
        )
        for j in range(k)
    ]


def kmeans(
    entries: np.ndarray | Sequence[Sample],
    k: int,
    *,
    tolerance: float = DEFAULT_TOLERANCE,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    seeding: Seeding = DEFAULT_SEEDING,
    rng: random.Random | None = None,
    cancel: threading.Event | None = None,
) -> KMeansResult:
    """Partition ``entries`` into ``k`` clusters.

    ``entries`` is either an ``(n, 4)`` float array or a sequence of
    :class:`Sample`. It is never modified.

    An empty cluster keeps its last position for the following passes. Its
    movement counts as infinite when it loses all members after having been
    populated, and as zero otherwise, so a cluster that stays empty cannot keep
    the loop alive.

    Raises:
        ValueError: If ``k``, ``tolerance``, ``max_iterations`` or ``seeding``
            is out of range, or if ``entries`` is not ``(n, 4)``.
        InsufficientSamplesError: If ``entries`` has fewer than ``k`` samples.
        ClusteringCancelled: If ``cancel`` is set between passes.
    """
    validate_config(k, tolerance, max_iterations, seeding)
    data = _as_array(entries)
    if len(data) < k:
        raise InsufficientSamplesError(k, len(data))
    if rng is None:
        rng = random.Random()

    seeds = _seed_indices(len(data), k, seeding, rng)
    logger.debug("seeded %d clusters (%s) at indices %s", k, seeding, seeds)
    positions = [Sample(*map(float, data[i])) for i in seeds]
    previous: list[Centroid | None] = [None] * k
    centroids: list[Centroid] = []

    for iteration in range(1, max_iterations + 1):
        if cancel is not None and cancel.is_set():
            raise ClusteringCancelled(f"cancelled before pass {iteration}")

        labels = _assign(data, positions)
        centroids = [acc.finalize() for acc in _accumulate(data, labels, k)]

        movement = 0.0
        for i, centroid in enumerate(centroids):
            if centroid.color is None:
                before = previous[i]
                if before is not None and not before.empty:
                    movement = math.inf
                continue
            movement += distance(positions[i], centroid.color)
            positions[i] = centroid.color
        previous = list(centroids)

        logger.debug("pass %d: total movement %.6g", iteration, movement)
        if movement <= tolerance:
            return KMeansResult(centroids=centroids, iterations=iteration, converged=True)

    logger.warning(
        "k-means did not converge within %d iterations (tolerance %g)", max_iterations, tolerance
    )
    return KMeansResult(centroids=centroids, iterations=max_iterations, converged=False)


def _population(centroid: Centroid) -> int:
    return centroid.count


def rank(centroids: Sequence[Centroid], arity: int = 3) -> list[Sample | None]:
    """Order centroids by population and map them to colors.

    The result has exactly ``arity`` entries. Ties keep their input order;
    empty clusters and missing slots are ``None``.
    """
    if arity < 1:
        raise ValueError(f"arity must be at least 1, got {arity}")
    ordered = sorted(centroids, key=_population, reverse=True)[:arity]
    colors = [c.color for c in ordered]
    return colors + [None] * (arity - len(colors))
