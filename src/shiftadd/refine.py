"""
Sub-pixel offset refinement by local cross-correlation.

For every anchor point of the reference frame, a small window is compared
with the target frame over a grid of integer candidate shifts using the
mean squared difference (MSD). The best candidate is refined to sub-pixel
precision with a parabola through its neighbours, and the anchors are
reconciled through the median of their deltas.

Offset convention: a target ``T`` with offset ``(dx, dy)`` relative to the
reference ``R`` satisfies ``T[y, x] == R[y + dy, x + dx]``.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import json
import logging
import math
from pathlib import Path

import numpy as np
from scipy.ndimage import median_filter

from .config import (
    CorrelationSample,
    Frame,
    OffsetEstimate,
    RejectedFrame,
    RejectionReason,
    SearchSpec,
    as_frames,
)
from .combine import SUPPORTED_DTYPES
from .errors import (
    IllegalInputError,
    IncompatibleInputError,
    InvalidTypeError,
    NullInputError,
)

logger = logging.getLogger(__name__)

OFFSETS_FORMAT_VERSION = "1.0"


def _as_anchor_array(anchors) -> np.ndarray:
    if anchors is None:
        raise NullInputError("Anchor list is None")
    arr = np.asarray(anchors)
    if arr.size == 0:
        raise IllegalInputError("At least one anchor point is required")
    arr = arr.reshape(-1, 2)
    if not np.all(arr == np.round(arr)):
        raise IllegalInputError("Anchor coordinates must be integers")
    return arr.astype(np.int64)


def _check_anchors_inside(anchors: np.ndarray, shape: tuple[int, int]) -> None:
    ny, nx = shape
    inside = (
        (anchors[:, 0] >= 0) & (anchors[:, 0] < nx)
        & (anchors[:, 1] >= 0) & (anchors[:, 1] < ny)
    )
    if not np.all(inside):
        bad = anchors[~inside][0]
        raise IllegalInputError(
            f"Anchor ({bad[0]}, {bad[1]}) lies outside the {nx}x{ny} reference frame"
        )


def _check_sample_types(stack: list[Frame]) -> None:
    """All frames must share one floating-point sample type."""
    dtype = stack[0].dtype
    for i, frame in enumerate(stack[1:], start=1):
        if frame.dtype != dtype:
            raise IncompatibleInputError(
                f"Frame {i} has dtype {frame.dtype}, expected {dtype}"
            )
    if dtype not in SUPPORTED_DTYPES:
        raise InvalidTypeError(
            f"Unsupported sample type {dtype}, expected float32 or float64"
        )


def correlation_grid(
    reference: np.ndarray,
    target: np.ndarray,
    x1: int,
    y1: int,
    x2: int,
    y2: int,
    search: SearchSpec,
) -> np.ndarray:
    """
    MSD of every candidate shift around one anchor.

    Parameters
    ----------
    reference, target : np.ndarray
        2-D frames of identical shape.
    x1, y1 : int
        Anchor position in the reference.
    x2, y2 : int
        Matching position in the target (anchor minus the integer prior).
    search : SearchSpec
        Search and measurement half-extents.

    Returns
    -------
    np.ndarray
        Grid of shape (2*s_hy+1, 2*s_hx+1); entry ``[l+s_hy, k+s_hx]``
        scores the reference window centred at ``(x1+k, y1+l)`` against
        the target window centred at ``(x2, y2)``. Unmeasurable candidates
        hold -1.

    Notes
    -----
    Windows are clipped to both frames. A candidate whose clipped window
    holds fewer than ``m_hx + m_hy`` samples is unmeasurable.
    """
    ny, nx = reference.shape
    s_hx, s_hy = int(search.s_hx), int(search.s_hy)
    m_hx, m_hy = int(search.m_hx), int(search.m_hy)

    grid = np.full((2 * s_hy + 1, 2 * s_hx + 1), -1.0)

    # Both window centres must stay inside the frames
    k_lo = -min(s_hx, x1, x2)
    k_hi = min(s_hx, nx - 1 - max(x1, x2))
    l_lo = -min(s_hy, y1, y2)
    l_hi = min(s_hy, ny - 1 - max(y1, y2))

    min_pix = m_hx + m_hy

    for l in range(l_lo, l_hi + 1):
        yr = y1 + l
        my_lo = -min(m_hy, yr, y2)
        my_hi = min(m_hy, ny - 1 - max(yr, y2))
        for k in range(k_lo, k_hi + 1):
            xr = x1 + k
            mx_lo = -min(m_hx, xr, x2)
            mx_hi = min(m_hx, nx - 1 - max(xr, x2))

            npix = (1 + mx_hi - mx_lo) * (1 + my_hi - my_lo)
            if npix < min_pix:
                continue

            win_ref = reference[yr + my_lo:yr + my_hi + 1, xr + mx_lo:xr + mx_hi + 1]
            win_tgt = target[y2 + my_lo:y2 + my_hi + 1, x2 + mx_lo:x2 + mx_hi + 1]
            diff = win_ref.astype(np.float64) - win_tgt
            grid[l + s_hy, k + s_hx] = float(np.mean(diff * diff))

    return grid


def _parabolic_increment(cm: float, c0: float, cp: float) -> float:
    """Vertex of the parabola through three equally spaced scores."""
    if cm < 0 or cp < 0:
        return 0.0
    denom = cm - 2.0 * c0 + cp
    if denom <= 0:
        return 0.0
    return 0.5 * (cm - cp) / denom


def best_candidate(grid: np.ndarray, search: SearchSpec) -> CorrelationSample:
    """
    Locate the minimum of a correlation grid with sub-pixel refinement.

    The first minimum in row-major order wins. Shifts on the edge of the
    search range are not refined.
    """
    valid = grid >= 0
    if not valid.any():
        return CorrelationSample(0.0, 0.0, -1.0)

    pos = int(np.argmin(np.where(valid, grid, np.inf)))
    row, col = divmod(pos, grid.shape[1])
    s_hx, s_hy = int(search.s_hx), int(search.s_hy)
    k_min = col - s_hx
    l_min = row - s_hy
    score = float(grid[row, col])

    inc_x = 0.0
    if -s_hx < k_min < s_hx:
        inc_x = _parabolic_increment(grid[row, col - 1], score, grid[row, col + 1])
    inc_y = 0.0
    if -s_hy < l_min < s_hy:
        inc_y = _parabolic_increment(grid[row - 1, col], score, grid[row + 1, col])

    return CorrelationSample(k_min + inc_x, l_min + inc_y, score)


def _choose_sample(samples: list[CorrelationSample]) -> CorrelationSample | None:
    """Pick the valid sample closest to the median of all valid deltas."""
    valid = [s for s in samples if s.valid]
    if not valid:
        return None
    if len(valid) == 1:
        return valid[0]
    deltas = np.array([[s.dx, s.dy] for s in valid])
    median = np.median(deltas, axis=0)
    dist2 = np.sum((deltas - median) ** 2, axis=1)
    return valid[int(np.argmin(dist2))]


def refine_offset(
    reference,
    target,
    anchors,
    search: SearchSpec | None = None,
    prior: tuple[float, float] = (0.0, 0.0),
) -> OffsetEstimate:
    """
    Refine the offset of ``target`` relative to ``reference``.

    Parameters
    ----------
    reference, target : np.ndarray, np.ma.MaskedArray or Frame
        Frames of identical shape. Bad-sample masks are not used.
    anchors : array-like of shape (n, 2)
        Integer (x, y) positions in the reference to correlate on.
    search : SearchSpec, optional
        Search and measurement half-extents (defaults to SearchSpec()).
    prior : tuple[float, float], default (0, 0)
        A-priori offset (dx, dy).

    Returns
    -------
    OffsetEstimate
        ``floor(prior) + delta`` of the chosen anchor and its MSD. When no
        anchor could be measured, the prior with quality -1.

    Raises
    ------
    NullInputError
        If a frame or the anchor list is None.
    IllegalInputError
        If anchors are empty or outside the reference, or search is invalid.
    IncompatibleInputError
        If the frames differ in shape or sample type.
    InvalidTypeError
        If the samples are not float32 or float64.
    """
    ref = Frame.from_array(reference)
    tgt = Frame.from_array(target)
    if ref.shape != tgt.shape:
        raise IncompatibleInputError(
            f"Frame shapes differ: {ref.shape} vs {tgt.shape}"
        )
    _check_sample_types([ref, tgt])
    search = search or SearchSpec()
    search.validate()
    anchor_arr = _as_anchor_array(anchors)
    _check_anchors_inside(anchor_arr, ref.shape)

    return _refine_pair(ref.data, tgt.data, anchor_arr, search, prior)


def _refine_pair(
    ref: np.ndarray,
    tgt: np.ndarray,
    anchors: np.ndarray,
    search: SearchSpec,
    prior: tuple[float, float],
) -> OffsetEstimate:
    ny, nx = ref.shape
    fx = math.floor(prior[0])
    fy = math.floor(prior[1])

    samples = []
    for x1, y1 in anchors:
        x1, y1 = int(x1), int(y1)
        x2, y2 = x1 - fx, y1 - fy
        if not (0 <= x2 < nx and 0 <= y2 < ny):
            logger.debug("Anchor (%d, %d) falls outside the target at (%d, %d)", x1, y1, x2, y2)
            samples.append(CorrelationSample(0.0, 0.0, -1.0))
            continue
        grid = correlation_grid(ref, tgt, x1, y1, x2, y2, search)
        sample = best_candidate(grid, search)
        logger.debug(
            "Anchor (%d, %d): delta=(%.3f, %.3f) msd=%.4g",
            x1, y1, sample.dx, sample.dy, sample.score,
        )
        samples.append(sample)

    chosen = _choose_sample(samples)
    if chosen is None:
        return OffsetEstimate(float(prior[0]), float(prior[1]), -1.0)
    return OffsetEstimate(fx + chosen.dx, fy + chosen.dy, chosen.score)


def near_search_boundary(
    estimate: OffsetEstimate,
    prior: tuple[float, float],
    search: SearchSpec,
    tolerance: float = 1.0,
) -> bool:
    """True when the refined shift lies within ``tolerance`` of the search edge."""
    return (
        abs(abs(prior[0] - estimate.dx) - search.s_hx) < tolerance
        or abs(abs(prior[1] - estimate.dy) - search.s_hy) < tolerance
    )


def refine_offsets(
    frames,
    priors,
    anchors,
    search: SearchSpec | None = None,
    prefilter: bool = True,
    boundary_tolerance: float = 1.0,
    show_progress: bool = False,
) -> tuple[list[OffsetEstimate], list[RejectedFrame]]:
    """
    Refine the offsets of a whole stack against its first frame.

    Parameters
    ----------
    frames : sequence of frames
        Stack of frames of identical shape; frame 0 is the reference.
    priors : array-like of shape (n, 2)
        A-priori offsets (dx, dy), one per frame.
    anchors : array-like of shape (m, 2)
        Integer (x, y) positions in the reference frame.
    search : SearchSpec, optional
        Search and measurement half-extents.
    prefilter : bool, default True
        Smooth every frame with a 3x3 median filter before correlating,
        which suppresses hot pixels and cosmic-ray hits. Edge samples are
        replicated to fill the window at the frame border, so anchors within
        one pixel of the edge see a slightly different filtered value than
        with a window shrunk to the available samples.
    boundary_tolerance : float, default 1.0
        A refined shift whose distance from the prior is within this many
        pixels of the search half-extent is rejected.
    show_progress : bool, default False
        Show progress bar.

    Returns
    -------
    tuple[list[OffsetEstimate], list[RejectedFrame]]
        (estimates, rejected)
        estimates has one entry per frame, the reference being (0, 0, 0).
        Non-registrable frames carry a negative quality.

    Raises
    ------
    NullInputError
        If the stack, the priors or the anchor list is None.
    IncompatibleInputError
        If the priors do not match the stack, or the frames differ in shape
        or sample type.
    InvalidTypeError
        If the samples are not float32 or float64.
    """
    from .cli_output import create_progress_bar

    stack = as_frames(frames)
    n = len(stack)
    if priors is None:
        raise NullInputError("Prior offsets are None")
    prior_arr = np.asarray(priors, dtype=np.float64).reshape(-1, 2)
    if prior_arr.shape[0] != n:
        raise IncompatibleInputError(
            f"Expected {n} prior offsets, got {prior_arr.shape[0]}"
        )
    shape = stack[0].shape
    for i, frame in enumerate(stack[1:], start=1):
        if frame.shape != shape:
            raise IncompatibleInputError(
                f"Frame {i} has shape {frame.shape}, expected {shape}"
            )
    _check_sample_types(stack)
    search = search or SearchSpec()
    search.validate()
    if boundary_tolerance < 0:
        raise IllegalInputError(
            f"boundary_tolerance must be non-negative, got {boundary_tolerance}"
        )
    anchor_arr = _as_anchor_array(anchors)
    _check_anchors_inside(anchor_arr, shape)

    def prepared(frame: Frame) -> np.ndarray:
        if prefilter:
            return median_filter(frame.data, size=3, mode="nearest")
        return frame.data

    reference = prepared(stack[0])
    estimates = [OffsetEstimate(0.0, 0.0, 0.0)]
    rejected = []

    logger.info(
        "Refining %d offsets with %d anchor(s), search %dx%d, window %dx%d",
        n - 1, len(anchor_arr), search.s_hx, search.s_hy, search.m_hx, search.m_hy,
    )

    pbar = create_progress_bar(
        total=n - 1,
        desc="Refining offsets",
        unit="frame",
        disable=not show_progress,
    )

    with pbar:
        for i in range(1, n):
            prior = (prior_arr[i, 0], prior_arr[i, 1])
            estimate = _refine_pair(reference, prepared(stack[i]), anchor_arr, search, prior)

            if not estimate.registered:
                logger.warning("Frame %d: no anchor could be correlated", i)
                rejected.append(RejectedFrame(i, RejectionReason.NOT_CORRELATED))
            elif near_search_boundary(estimate, prior, search, boundary_tolerance):
                logger.warning(
                    "Frame %d: shift (%.2f, %.2f) reaches the search boundary",
                    i, estimate.dx, estimate.dy,
                )
                rejected.append(RejectedFrame(
                    i,
                    RejectionReason.SEARCH_BOUNDARY,
                    f"dx={estimate.dx:.2f}, dy={estimate.dy:.2f}",
                ))
                estimate = OffsetEstimate(0.0, 0.0, -1.0)
            else:
                logger.debug(
                    "Frame %d: offset (%.3f, %.3f), msd=%.4g",
                    i, estimate.dx, estimate.dy, estimate.quality,
                )

            estimates.append(estimate)
            n_ok = sum(1 for e in estimates[1:] if e.registered)
            pbar.set_postfix(ok=f"{n_ok}/{i}")
            pbar.update(1)

    logger.info(
        "Offset refinement complete: %d registered, %d rejected",
        n - 1 - len(rejected),
        len(rejected),
    )
    return estimates, rejected


def offset_to_dict(estimate: OffsetEstimate) -> dict:
    """Convert an OffsetEstimate to a JSON-serializable dict."""
    return {
        "dx": float(estimate.dx),
        "dy": float(estimate.dy),
        "quality": float(estimate.quality),
    }


def dict_to_offset(d: dict) -> OffsetEstimate:
    """Convert a dict back to OffsetEstimate."""
    return OffsetEstimate(
        dx=float(d["dx"]),
        dy=float(d["dy"]),
        quality=float(d.get("quality", 0.0)),
    )


def save_offsets(
    estimates: list[OffsetEstimate],
    output_path: str | Path,
    metadata: dict | None = None,
) -> None:
    """
    Save refined offsets to a JSON file.

    Parameters
    ----------
    estimates : list[OffsetEstimate]
        Offsets to save, one per frame.
    output_path : str or Path
        Output JSON file path.
    metadata : dict, optional
        Additional metadata to include.

    Notes
    -----
    The JSON file contains:
    - version: format version
    - n_offsets: number of offsets
    - n_registered: number of offsets with a non-negative quality
    - metadata: optional extra info
    - offsets: list of offset dicts
    """
    output_path = Path(output_path)
    n_registered = sum(1 for e in estimates if e.registered)

    data = {
        "version": OFFSETS_FORMAT_VERSION,
        "n_offsets": len(estimates),
        "n_registered": n_registered,
        "metadata": metadata or {},
        "offsets": [offset_to_dict(e) for e in estimates],
    }

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with open(output_path, "w") as f:
        json.dump(data, f, indent=2)

    logger.info(
        "Saved %d offsets (%d registered) to %s",
        len(estimates),
        n_registered,
        output_path,
    )


def load_offsets(input_path: str | Path) -> tuple[list[OffsetEstimate], dict]:
    """
    Load offsets from a JSON file written by :func:`save_offsets`.

    Returns
    -------
    tuple
        (estimates, metadata)
    """
    input_path = Path(input_path)

    with open(input_path) as f:
        data = json.load(f)

    estimates = [dict_to_offset(d) for d in data["offsets"]]
    metadata = data.get("metadata", {})

    logger.info("Loaded %d offsets from %s", len(estimates), input_path)

    return estimates, metadata
