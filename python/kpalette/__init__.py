"""`kpalette` finds the dominant colors of an image with k-means clustering.

Pixels are clustered as RGBA samples with plain Euclidean distance, and the
three most populated clusters are reported as the primary, secondary and
tertiary colors.
"""

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Literal, Self, overload

import numpy as np
from PIL import Image

from kpalette._core import (
    DEFAULT_CLUSTER_COUNT,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_SEEDING,
    DEFAULT_TOLERANCE,
    Accumulator,
    Centroid,
    ClusteringCancelled,
    InsufficientSamplesError,
    KMeansResult,
    KPaletteError,
    Sample,
    Seeding,
    distance,
    kmeans,
    rank,
    samples_from_rgba8,
    validate_config,
)

__all__ = [
    "palette",
    "palette_in_background",
    "samples_from_image",
    "samples_from_rgba8",
    "kmeans",
    "rank",
    "distance",
    "RGBA",
    "Palette",
    "DebugInfo",
    "ResizeQuality",
    "Sample",
    "Accumulator",
    "Centroid",
    "KMeansResult",
    "KPaletteError",
    "InsufficientSamplesError",
    "ClusteringCancelled",
    "DEFAULT_CLUSTER_COUNT",
    "DEFAULT_TOLERANCE",
    "DEFAULT_MAX_ITERATIONS",
    "DEFAULT_SEEDING",
]

logger = logging.getLogger(__name__)


class ResizeQuality(float, Enum):
    """Linear scale factor applied to both image dimensions before clustering."""

    LOW = 0.3
    MEDIUM = 0.5
    HIGH = 0.8
    STANDARD = 1.0


@dataclass(frozen=True, slots=True)
class RGBA:
    """An sRGB color with alpha, all components in the [0, 255] range."""

    r: int
    g: int
    b: int
    a: int

    @classmethod
    def _from_sample(cls, sample: Sample) -> Self:
        return cls(
            round(sample.r * 255),
            round(sample.g * 255),
            round(sample.b * 255),
            round(sample.a * 255),
        )

    def __str__(self) -> str:
        return f"#{self.r:02x}{self.g:02x}{self.b:02x}{self.a:02x}"


@dataclass(frozen=True, slots=True)
class Palette:
    """The dominant colors of an image, most populated first.

    ``primary`` is always present. ``secondary`` and ``tertiary`` are ``None``
    when fewer clusters ended up with members.
    """

    primary: RGBA
    secondary: RGBA | None = None
    tertiary: RGBA | None = None

    def __str__(self) -> str:
        description = f"Primary: {self.primary}"
        if self.secondary is not None:
            description += f", Secondary: {self.secondary}"
        if self.tertiary is not None:
            description += f", Tertiary: {self.tertiary}"
        return description


@dataclass(frozen=True, slots=True)
class DebugInfo:
    """Debug info returned by ``palette()`` when called with ``with_debug=True``.

    Attributes:
        centroids: All k-means centroids in seed order, including empty ones.
        cluster_count: The number of clusters actually used. Lower than the
            requested count when the image has fewer pixels.
        kmeans_loop_iterations: The number of assignment passes k-means took.
        kmeans_converged: Did k-means converge? If not, it was cut off by the
            maximum number of iterations.
    """

    centroids: list[Centroid]
    cluster_count: int
    kmeans_loop_iterations: int
    kmeans_converged: bool

    @classmethod
    def _from_result(cls, result: KMeansResult) -> Self:
        return cls(
            centroids=list(result.centroids),
            cluster_count=len(result.centroids),
            kmeans_loop_iterations=result.iterations,
            kmeans_converged=result.converged,
        )


def samples_from_image(
    image: Image.Image, quality: ResizeQuality = ResizeQuality.STANDARD
) -> np.ndarray:
    """Read the pixels of a PIL image as an ``(n, 4)`` sample array, in row-major order.

    Raises:
        ValueError: If the image mode is neither RGB nor RGBA.
    """
    if image.mode not in ("RGB", "RGBA"):
        raise ValueError(f"expected RGB or RGBA image, got {image.mode!r}")
    if image.mode == "RGB":
        image = image.convert("RGBA")
    if quality is not ResizeQuality.STANDARD:
        width, height = image.size
        size = (max(1, round(width * quality.value)), max(1, round(height * quality.value)))
        if width and height and size != image.size:
            image = image.resize(size)
    return samples_from_rgba8(image.tobytes())


@overload
def palette(
    image: Image.Image,
    *,
    quality: ResizeQuality = ...,
    cluster_count: int = ...,
    tolerance: float = ...,
    max_iterations: int = ...,
    seeding: Seeding = ...,
    seed: int | None = ...,
    cancel: threading.Event | None = ...,
    with_debug: Literal[True],
) -> tuple[Palette, DebugInfo] | None: ...


@overload
def palette(
    image: Image.Image,
    *,
    quality: ResizeQuality = ...,
    cluster_count: int = ...,
    tolerance: float = ...,
    max_iterations: int = ...,
    seeding: Seeding = ...,
    seed: int | None = ...,
    cancel: threading.Event | None = ...,
    with_debug: Literal[False] = ...,
) -> Palette | None: ...


def palette(
    image: Image.Image,
    *,
    quality: ResizeQuality = ResizeQuality.STANDARD,
    cluster_count: int = DEFAULT_CLUSTER_COUNT,
    tolerance: float = DEFAULT_TOLERANCE,
    max_iterations: int = DEFAULT_MAX_ITERATIONS,
    seeding: Seeding = DEFAULT_SEEDING,
    seed: int | None = None,
    cancel: threading.Event | None = None,
    with_debug: bool = False,
) -> Palette | tuple[Palette, DebugInfo] | None:
    """Extract the dominant colors from a PIL image.

    Returns ``None`` if the image has no pixels. Otherwise returns a
    :class:`Palette` whose primary color is the centroid of the most populated
    cluster.

    Args:
        image: A PIL image in RGB or RGBA mode.
        quality: Downscaling applied before clustering, trading accuracy for
            speed. ``ResizeQuality.STANDARD`` keeps the original size.
        cluster_count: The number of k-means clusters. Reduced to the number
            of pixels for tiny images. Must be at least 1.
        tolerance: k-means stops once the centroids move less than this in
            total, in [0, 1] channel units. Must be non-negative.
        max_iterations: Hard cap on k-means passes. Must be at least 1.
        seeding: ``"stratified"`` draws one seed from each of ``cluster_count``
            contiguous bands of pixels; ``"uniform"`` draws them from anywhere.
        seed: Seed for the random generator, for reproducible results.
        cancel: If set while clustering runs, :class:`ClusteringCancelled` is
            raised after the current pass.
        with_debug: If ``True``, return a ``(palette, debug_info)`` tuple.

    Raises:
        ValueError: If the image mode is not RGB or RGBA, or if any config
            parameter is out of range.
        ClusteringCancelled: If ``cancel`` was set.
    """
    validate_config(cluster_count, tolerance, max_iterations, seeding)
    samples = samples_from_image(image, quality)
    if len(samples) == 0:
        return None
    k = cluster_count
    if len(samples) < k:
        logger.debug("reducing cluster count from %d to %d", k, len(samples))
        k = len(samples)

    result = kmeans(
        samples,
        k,
        tolerance=tolerance,
        max_iterations=max_iterations,
        seeding=seeding,
        rng=random.Random(seed),
        cancel=cancel,
    )
    primary, secondary, tertiary = (
        None if color is None else RGBA._from_sample(color) for color in rank(result.centroids)
    )
    if primary is None:
        raise KPaletteError("k-means produced no populated cluster")
    found = Palette(primary=primary, secondary=secondary, tertiary=tertiary)
    if with_debug:
        return found, DebugInfo._from_result(result)
    return found


_background_lock = threading.Lock()
_background_executor: ThreadPoolExecutor | None = None


def _default_executor() -> ThreadPoolExecutor:
    global _background_executor
    with _background_lock:
        if _background_executor is None:
            _background_executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="kpalette"
            )
        return _background_executor


def palette_in_background(
    image: Image.Image, *, executor: Executor | None = None, **options: Any
) -> Future[Palette | tuple[Palette, DebugInfo] | None]:
    """Run :func:`palette` on a worker thread.

    Keyword options are passed through to :func:`palette`. Use
    ``add_done_callback`` on the returned future to receive the result.
    """
    if executor is None:
        executor = _default_executor()
    return executor.submit(palette, image, **options)
