"""
Shift-and-add combination of a registered frame stack.

Every frame is resampled onto a common canvas at its offset with a
separable 4-tap kernel, then the samples falling on each output pixel are
averaged, optionally after rejecting the lowest and highest values.

Two accumulation strategies are selected once per call:

- ``_accumulate_sums``: running sums and counts, used when no sample is
  rejected and no frame carries bad samples.
- ``_accumulate_trimmed``: per-pixel sample lists processed row chunk by
  row chunk, used for outlier rejection or bad-sample masks.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass

import numpy as np
from astropy.stats import mad_std

from .config import CombinedResult, Frame, GeometryMode, RejectionPolicy, as_frames
from .errors import (
    IllegalInputError,
    IllegalOutputError,
    IncompatibleInputError,
    InvalidTypeError,
    NullInputError,
)
from .kernel import (
    Kernel,
    default_profile,
    phase_index,
    separable_weights,
    validate_profile,
)
from .select import select_extremes

logger = logging.getLogger(__name__)

SUPPORTED_DTYPES = (np.dtype(np.float32), np.dtype(np.float64))


@dataclass
class Canvas:
    """Output canvas: reference coordinate of pixel (0, 0) and size."""

    start_x: float
    start_y: float
    nx: int
    ny: int

    @property
    def shape(self) -> tuple[int, int]:
        return self.ny, self.nx


@dataclass
class Placement:
    """Integer shift and interpolation weights of one frame on the canvas."""

    oi: int  # Source column of output column 0
    oj: int  # Source row of output row 0
    tabx: int
    taby: int
    wx: np.ndarray | None = None
    wy: np.ndarray | None = None

    @property
    def integer(self) -> bool:
        return self.tabx == 0 and self.taby == 0


@dataclass
class CombineStatistics:
    """Statistics from a combination."""

    n_frames: int
    mean_contribution: float
    min_contribution: int
    max_contribution: int
    rejected_fraction: float  # Fraction of output pixels without any sample
    snr_proxy: float


def compute_canvas(
    offsets: np.ndarray,
    shape: tuple[int, int],
    geometry: GeometryMode | str = GeometryMode.INTERSECT,
    rmin: int = 0,
    rmax: int = 0,
) -> Canvas:
    """
    Compute the output canvas for a set of offsets.

    Parameters
    ----------
    offsets : np.ndarray
        Offsets (dx, dy), shape (n, 2).
    shape : tuple[int, int]
        Frame shape (height, width).
    geometry : GeometryMode or str, default "intersect"
        Canvas policy.
    rmin, rmax : int, default 0
        Effective rejection counts. In union mode the ``rmin`` lowest and
        ``rmax`` highest offsets per axis are ignored when sizing the canvas.

    Returns
    -------
    Canvas
        Start position and size of the output.

    Raises
    ------
    IllegalOutputError
        If the intersection of the frames is empty.
    """
    geometry = GeometryMode.parse(geometry)
    offsets = np.asarray(offsets, dtype=np.float64).reshape(-1, 2)
    height, width = shape
    n = offsets.shape[0]

    if geometry is GeometryMode.INTERSECT:
        start_x, start_y = offsets.max(axis=0)
        min_x, min_y = offsets.min(axis=0)
        nx = math.floor(width - start_x + min_x)
        ny = math.floor(height - start_y + min_y)
        if nx <= 0 or ny <= 0:
            raise IllegalOutputError(
                f"Frames do not intersect: canvas would be {nx}x{ny}"
            )
    elif geometry is GeometryMode.UNION:
        ox = np.sort(offsets[:, 0])
        oy = np.sort(offsets[:, 1])
        start_x, start_y = ox[rmin], oy[rmin]
        max_x, max_y = ox[n - rmax - 1], oy[n - rmax - 1]
        nx = math.floor(width + max_x - start_x)
        ny = math.floor(height + max_y - start_y)
    else:
        start_x, start_y = 0.0, 0.0
        nx, ny = width, height

    return Canvas(float(start_x), float(start_y), int(nx), int(ny))


def _placement(canvas: Canvas, offset: np.ndarray, profile: np.ndarray) -> Placement:
    off_x = canvas.start_x - offset[0]
    off_y = canvas.start_y - offset[1]
    oi = math.floor(off_x)
    oj = math.floor(off_y)
    placement = Placement(oi, oj, phase_index(off_x - oi), phase_index(off_y - oj))
    if not placement.integer:
        placement.wx, placement.wy = separable_weights(profile, placement.tabx, placement.taby)
    return placement


def _interpolate(src: np.ndarray, wx: np.ndarray, wy: np.ndarray, py0: int, py1: int) -> np.ndarray:
    """
    4x4-tap interpolation of source rows ``py0 <= py < py1``.

    Row ``r`` of the result at column ``px`` (``1 <= px <= W-3``) holds
    ``sum_j wy[j] * sum_i wx[i] * src[py0+r-1+j, px-1+i]``; the other
    columns are 0. Requires ``py0 >= 1`` and ``py1 <= H-2``.
    """
    width = src.shape[1]
    rows = src[py0 - 1:py1 + 2].astype(np.float64)
    h = np.zeros_like(rows)
    h[:, 1:width - 2] = (
        wx[0] * rows[:, 0:width - 3]
        + wx[1] * rows[:, 1:width - 2]
        + wx[2] * rows[:, 2:width - 1]
        + wx[3] * rows[:, 3:width]
    )
    m = py1 - py0
    return wy[0] * h[0:m] + wy[1] * h[1:m + 1] + wy[2] * h[2:m + 2] + wy[3] * h[3:m + 3]


def _tap_mask(mask: np.ndarray, py0: int, py1: int) -> np.ndarray:
    """
    Bad-tap map of source rows ``py0 <= py < py1``.

    Entry ``[r, px]`` is True when any of the 4x4 samples read to
    interpolate at ``(py0+r, px)`` is bad. Same validity range as
    :func:`_interpolate`.
    """
    width = mask.shape[1]
    rows = mask[py0 - 1:py1 + 2]
    h = np.zeros(rows.shape, dtype=bool)
    # 4 adjacent mask bits of every row
    h[:, 1:width - 2] = rows[:, 0:width - 3] | rows[:, 1:width - 2] | rows[:, 2:width - 1] | rows[:, 3:width]
    m = py1 - py0
    return h[0:m] | h[1:m + 1] | h[2:m + 2] | h[3:m + 3]


def seed_contribution(mask: np.ndarray | None, shape: tuple[int, int]) -> np.ndarray:
    """Fresh int32 contribution map: 1 for good samples, 0 for bad ones."""
    if mask is None:
        return np.ones(shape, dtype=np.int32)
    return (~np.asarray(mask, dtype=bool)).astype(np.int32)


def _accumulate_sums(
    stack: list[Frame],
    placements: list[Placement],
    canvas: Canvas,
    seed: Frame | None = None,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Sum-and-count accumulation, for stacks without rejection or bad samples.

    An 8-bit counter per pixel is promoted into the int32 contribution map
    every time it wraps around.
    """
    ny, nx = canvas.shape
    acc = np.zeros((ny, nx), dtype=np.float64)
    contrib = np.zeros((ny, nx), dtype=np.int32)
    count8 = np.zeros((ny, nx), dtype=np.uint8)

    if seed is not None:
        acc += seed.data
        if seed.mask is not None:
            acc[seed.mask] = 0.0
        contrib = seed_contribution(seed.mask, seed.shape)

    for frame, pl in zip(stack, placements):
        height, width = frame.shape
        if pl.integer:
            px0, px1 = max(0, pl.oi), min(width, nx + pl.oi)
            py0, py1 = max(0, pl.oj), min(height, ny + pl.oj)
            if px0 >= px1 or py0 >= py1:
                continue
            values = frame.data[py0:py1, px0:px1]
        else:
            # Interpolate source samples at least 2 pixels from the border
            px0, px1 = max(2, pl.oi), min(width - 2, nx + pl.oi)
            py0, py1 = max(2, pl.oj), min(height - 2, ny + pl.oj)
            if px0 >= px1 or py0 >= py1:
                continue
            values = _interpolate(frame.data, pl.wx, pl.wy, py0, py1)[:, px0:px1]

        region = (slice(py0 - pl.oj, py1 - pl.oj), slice(px0 - pl.oi, px1 - pl.oi))
        acc[region] += values
        counter = count8[region]
        counter += 1
        wide = contrib[region]
        wide[counter == 0] += 256

    contrib += count8
    return acc, contrib


def _accumulate_trimmed(
    stack: list[Frame],
    placements: list[Placement],
    canvas: Canvas,
    rmin: int,
    rmax: int,
    chunk_rows: int = 16,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Trimmed-mean accumulation with bad-sample exclusion.

    Output rows are processed ``chunk_rows`` at a time. For each chunk, the
    samples of every frame are gathered into a buffer of shape
    (n_frames, chunk_rows * nx), one sample list per output pixel in frame
    order. Only source samples at least 2 pixels from the frame border
    contribute; an interpolated sample is dropped when any of its 16 taps
    is bad.
    """
    ny, nx = canvas.shape
    n = len(stack)
    rtot = rmin + rmax
    out = np.zeros((ny, nx), dtype=np.float64)
    contrib = np.zeros((ny, nx), dtype=np.int32)
    masked = [frame.has_bad_samples for frame in stack]

    for j0 in range(0, ny, chunk_rows):
        j1 = min(ny, j0 + chunk_rows)
        m = j1 - j0
        buf = np.zeros((n, m * nx), dtype=np.float64)
        count = np.zeros(m * nx, dtype=np.int64)

        for p, (frame, pl) in enumerate(zip(stack, placements)):
            height, width = frame.shape
            jlo, jhi = max(j0, 2 - pl.oj), min(j1, height - 2 - pl.oj)
            ilo, ihi = max(0, 2 - pl.oi), min(nx, width - 2 - pl.oi)
            if jlo >= jhi or ilo >= ihi:
                continue
            py0, py1 = jlo + pl.oj, jhi + pl.oj
            px0, px1 = ilo + pl.oi, ihi + pl.oi

            if pl.integer:
                values = frame.data[py0:py1, px0:px1]
                bad = frame.mask[py0:py1, px0:px1] if masked[p] else None
            else:
                values = _interpolate(frame.data, pl.wx, pl.wy, py0, py1)[:, px0:px1]
                bad = _tap_mask(frame.mask, py0, py1)[:, px0:px1] if masked[p] else None

            block = np.zeros((m, nx), dtype=np.float64)
            good = np.zeros((m, nx), dtype=bool)
            block[jlo - j0:jhi - j0, ilo:ihi] = values
            good[jlo - j0:jhi - j0, ilo:ihi] = True if bad is None else ~bad

            cols = np.flatnonzero(good)
            buf[count[cols], cols] = block.ravel()[cols]
            count[cols] += 1

        keep = count > rtot
        if rtot > 0:
            select_extremes(buf, rmin, rmax, counts=count)
        rank = np.arange(n)[:, None]
        middle = (rank >= rmin) & (rank < count - rmax)
        total = np.where(middle, buf, 0.0).sum(axis=0)
        used = np.where(keep, count - rtot, 0)

        values = np.zeros(m * nx, dtype=np.float64)
        values[keep] = total[keep] / used[keep]
        out[j0:j1] = values.reshape(m, nx)
        contrib[j0:j1] = used.reshape(m, nx)

    return out, contrib


def combine_frames(
    frames,
    offsets,
    kernel: Kernel | str = Kernel.TANH,
    rmin: int = 0,
    rmax: int = 0,
    geometry: GeometryMode | str = GeometryMode.INTERSECT,
    profile: np.ndarray | None = None,
    chunk_rows: int = 16,
) -> CombinedResult:
    """
    Shift-and-add a stack of frames onto a common canvas.

    Parameters
    ----------
    frames : sequence of frames
        ndarrays, MaskedArrays or Frames of identical shape and dtype
        (float32 or float64). Masks flag bad samples.
    offsets : array-like of shape (n, 2)
        Offset (dx, dy) of every frame relative to the reference.
    kernel : Kernel or str, default Kernel.TANH
        Interpolation kernel for sub-pixel phases.
    rmin, rmax : int, default 0
        Number of lowest/highest samples rejected per output pixel. Ignored
        when the stack has 3 frames or fewer, or fewer than
        ``2 * (rmin + rmax) + 1``.
    geometry : GeometryMode or str, default "intersect"
        Output canvas policy.
    profile : np.ndarray, optional
        Kernel profile overriding ``kernel`` (1000 phases per pixel).
    chunk_rows : int, default 16
        Output rows processed at once when rejecting samples. Memory use
        of that path is ``n_frames * chunk_rows * width`` samples.

    Returns
    -------
    CombinedResult
        Combined image (input dtype, 0 where rejected), contribution map
        and canvas origin.

    Raises
    ------
    NullInputError
        If frames or offsets are None.
    IllegalInputError
        If rejection counts are negative or the stack is empty.
    IncompatibleInputError
        If offsets and frames differ in count, or frames differ in shape
        or dtype.
    InvalidTypeError
        If frames are not float32 or float64.
    IllegalOutputError
        If the intersection canvas is empty.
    """
    stack = as_frames(frames)
    n = len(stack)
    shape = stack[0].shape
    dtype = stack[0].dtype
    for i, frame in enumerate(stack[1:], start=1):
        if frame.shape != shape:
            raise IncompatibleInputError(
                f"Frame {i} has shape {frame.shape}, expected {shape}"
            )
        if frame.dtype != dtype:
            raise IncompatibleInputError(
                f"Frame {i} has dtype {frame.dtype}, expected {dtype}"
            )
    if dtype not in SUPPORTED_DTYPES:
        raise InvalidTypeError(
            f"Unsupported sample type {dtype}, expected float32 or float64"
        )

    if offsets is None:
        raise NullInputError("Offsets are None")
    offs = np.asarray(offsets, dtype=np.float64)
    if offs.ndim != 2 or offs.shape != (n, 2):
        raise IncompatibleInputError(
            f"Expected offsets of shape ({n}, 2), got {offs.shape}"
        )
    if chunk_rows < 1:
        raise IllegalInputError(f"chunk_rows must be positive, got {chunk_rows}")

    geometry = GeometryMode.parse(geometry)
    rmin, rmax = RejectionPolicy(rmin, rmax).effective(n)
    rtot = rmin + rmax
    profile = validate_profile(profile) if profile is not None else default_profile(kernel)

    canvas = compute_canvas(offs, shape, geometry, rmin, rmax)
    slow = rtot > 0 or any(frame.has_bad_samples for frame in stack)

    logger.info(
        "Combining %d frames (%s) onto %dx%d canvas, geometry=%s, rejection=%d/%d, %s path",
        n, dtype, canvas.nx, canvas.ny, geometry.value, rmin, rmax,
        "trimmed" if slow else "summing",
    )

    if slow:
        placements = [_placement(canvas, o, profile) for o in offs]
        n_int = sum(pl.integer for pl in placements)
        logger.debug("%d integer and %d interpolated placements", n_int, n - n_int)
        acc, contrib = _accumulate_trimmed(stack, placements, canvas, rmin, rmax, chunk_rows)
    elif geometry is GeometryMode.FIRST and n > 1:
        # Seed from the first frame, accumulate the others
        placements = [_placement(canvas, o, profile) for o in offs[1:]]
        acc, contrib = _accumulate_sums(stack[1:], placements, canvas, seed=stack[0])
    else:
        placements = [_placement(canvas, o, profile) for o in offs]
        acc, contrib = _accumulate_sums(stack, placements, canvas)

    rejected = contrib == 0
    image = np.zeros(canvas.shape, dtype=np.float64)
    np.divide(acc, contrib, out=image, where=~rejected)

    n_rejected = int(rejected.sum())
    if n_rejected:
        logger.info("%d output pixels have no contribution", n_rejected)

    return CombinedResult(
        image=image.astype(dtype),
        contribution=contrib.astype(np.int32),
        rejected=rejected,
        origin=(-canvas.start_x, -canvas.start_y),
        offsets=offs.copy(),
        frame_indices=list(range(n)),
    )


def compute_combine_statistics(result: CombinedResult, n_frames: int | None = None) -> CombineStatistics:
    """
    Compute statistics for a combined result.

    Parameters
    ----------
    result : CombinedResult
        Output of :func:`combine_frames`.
    n_frames : int, optional
        Number of input frames (defaults to the frames combined).

    Returns
    -------
    CombineStatistics
        Statistics dataclass.
    """
    if n_frames is None:
        n_frames = len(result.frame_indices)
    contrib = result.contribution
    good = ~result.rejected

    # Simple SNR proxy: median signal over MAD-based noise
    if good.any():
        samples = result.image[good].astype(np.float64)
        signal = float(np.median(samples))
        noise = float(mad_std(samples))
        snr_proxy = signal / noise if noise > 0 else 0.0
    else:
        snr_proxy = 0.0

    return CombineStatistics(
        n_frames=n_frames,
        mean_contribution=float(contrib.mean()),
        min_contribution=int(contrib.min()),
        max_contribution=int(contrib.max()),
        rejected_fraction=float(result.rejected.mean()),
        snr_proxy=snr_proxy,
    )
