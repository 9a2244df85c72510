"""
Registration pipeline: refine the offsets of a stack, drop the frames that
do not correlate, and shift-and-add the rest.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging

import numpy as np

from .anchors import DEFAULT_SIGMAS, detect_anchor
from .combine import combine_frames
from .config import (
    CombinedResult,
    Frame,
    GeometryMode,
    OffsetEstimate,
    RegistrationConfig,
    RejectedFrame,
    RejectionPolicy,
    SearchSpec,
    as_frames,
)
from .errors import DataNotFoundError, IncompatibleInputError, NullInputError
from .kernel import Kernel
from .refine import refine_offsets

logger = logging.getLogger(__name__)


def _prior_array(prior_offsets, n: int) -> np.ndarray:
    if prior_offsets is None:
        raise NullInputError("Prior offsets are None")
    priors = np.asarray(prior_offsets, dtype=np.float64).reshape(-1, 2)
    if priors.shape[0] != n:
        raise IncompatibleInputError(
            f"Expected {n} prior offsets, got {priors.shape[0]}"
        )
    return priors


def register_stack(
    frames,
    prior_offsets,
    anchors=None,
    search: SearchSpec | None = None,
    sigmas=DEFAULT_SIGMAS,
    prefilter: bool = True,
    boundary_tolerance: float = 1.0,
    show_progress: bool = False,
) -> tuple[list[OffsetEstimate], list[RejectedFrame]]:
    """
    Refine the offsets of a stack against frame 0.

    When no anchor is supplied, the largest aperture detected in frame 0 is
    used. If detection finds nothing, the prior offsets are returned
    unchanged with quality 0 so that the whole stack is combined as given.

    Returns
    -------
    tuple[list[OffsetEstimate], list[RejectedFrame]]
        (estimates, rejected), see :func:`shiftadd.refine.refine_offsets`.
    """
    stack = as_frames(frames)
    priors = _prior_array(prior_offsets, len(stack))

    if anchors is None:
        try:
            anchor, _ = detect_anchor(stack[0], sigmas)
        except DataNotFoundError as e:
            logger.warning("%s; combining with the prior offsets", e)
            return [OffsetEstimate(float(dx), float(dy), 0.0) for dx, dy in priors], []
        anchors = [anchor]

    return refine_offsets(
        stack,
        priors,
        anchors,
        search=search,
        prefilter=prefilter,
        boundary_tolerance=boundary_tolerance,
        show_progress=show_progress,
    )


def combine_registered(
    frames: list[Frame],
    estimates: list[OffsetEstimate],
    rejection: RejectionPolicy | None = None,
    geometry: GeometryMode | str = GeometryMode.INTERSECT,
    kernel: Kernel | str = Kernel.TANH,
) -> CombinedResult:
    """
    Combine the frames whose offset estimate is registered.

    Raises
    ------
    DataNotFoundError
        If no frame besides the reference is registered.
    """
    stack = as_frames(frames)
    n = len(stack)
    if len(estimates) != n:
        raise IncompatibleInputError(f"Expected {n} offset estimates, got {len(estimates)}")
    rejection = rejection or RejectionPolicy()

    keep = [i for i, e in enumerate(estimates) if e.registered]
    if n > 1 and len(keep) < 2:
        raise DataNotFoundError(
            f"None of the {n - 1} frames could be registered to the reference"
        )
    if len(keep) < n:
        logger.warning("Dropping %d of %d frames that did not correlate", n - len(keep), n)

    offsets = np.array([[estimates[i].dx, estimates[i].dy] for i in keep]).reshape(-1, 2)
    result = combine_frames(
        [stack[i] for i in keep],
        offsets,
        kernel=kernel,
        rmin=rejection.rmin,
        rmax=rejection.rmax,
        geometry=geometry,
    )
    result.frame_indices = keep
    return result


def register_and_combine(
    frames,
    prior_offsets,
    anchors=None,
    search: SearchSpec | None = None,
    rejection: RejectionPolicy | None = None,
    geometry: GeometryMode | str = GeometryMode.INTERSECT,
    kernel: Kernel | str = Kernel.TANH,
    refine: bool = True,
    sigmas=DEFAULT_SIGMAS,
    prefilter: bool = True,
    boundary_tolerance: float = 1.0,
    show_progress: bool = False,
    rejected: list[RejectedFrame] | None = None,
) -> CombinedResult:
    """
    Refine offsets against frame 0, then combine the registered frames.

    Parameters
    ----------
    frames : sequence of frames
        Stack of frames of identical shape and dtype; frame 0 is the
        reference.
    prior_offsets : array-like of shape (n, 2)
        A-priori offsets (dx, dy), one per frame.
    anchors : array-like of shape (m, 2), optional
        Integer (x, y) correlation anchors in frame 0. When omitted, the
        largest aperture detected in frame 0 is used; if none is found the
        stack is combined with the prior offsets.
    search : SearchSpec, optional
        Search and measurement half-extents.
    rejection : RejectionPolicy, optional
        Per-pixel outlier rejection counts.
    geometry : GeometryMode or str, default "intersect"
        Output canvas policy.
    kernel : Kernel or str, default Kernel.TANH
        Interpolation kernel.
    refine : bool, default True
        Refine the offsets; when False the priors are combined directly.
    sigmas : sequence of float, default (5, 2, 1, 0.5)
        Detection thresholds for the anchor search.
    prefilter : bool, default True
        Median-filter the frames before correlating.
    boundary_tolerance : float, default 1.0
        Search-edge tolerance (pixels) of the refinement.
    show_progress : bool, default False
        Show progress bar.
    rejected : list, optional
        When given, receives a RejectedFrame record per dropped frame.

    Returns
    -------
    CombinedResult
        Combination of the registered frames; ``frame_indices`` lists
        which input frames were used.

    Raises
    ------
    DataNotFoundError
        If no frame besides the reference could be registered.
    """
    stack = as_frames(frames)
    n = len(stack)
    priors = _prior_array(prior_offsets, n)
    search = search or SearchSpec()
    rejection = rejection or RejectionPolicy()
    search.validate()
    rejection.validate()

    if not refine or n == 1:
        estimates = [OffsetEstimate(float(dx), float(dy), 0.0) for dx, dy in priors]
    else:
        estimates, dropped = register_stack(
            stack,
            priors,
            anchors=anchors,
            search=search,
            sigmas=sigmas,
            prefilter=prefilter,
            boundary_tolerance=boundary_tolerance,
            show_progress=show_progress,
        )
        if rejected is not None:
            rejected.extend(dropped)

    return combine_registered(stack, estimates, rejection, geometry, kernel)


def run_registration(
    frames,
    prior_offsets,
    config: RegistrationConfig | None = None,
    anchors=None,
    show_progress: bool = False,
    rejected: list[RejectedFrame] | None = None,
) -> CombinedResult:
    """Run :func:`register_and_combine` with the settings of ``config``."""
    config = config or RegistrationConfig()
    config.validate()
    return register_and_combine(
        frames,
        prior_offsets,
        anchors=anchors,
        search=config.search_spec(),
        rejection=config.rejection_policy(),
        geometry=config.geometry,
        kernel=config.kernel,
        refine=config.refine,
        sigmas=config.sigmas,
        prefilter=config.prefilter,
        boundary_tolerance=config.boundary_tolerance,
        show_progress=show_progress,
        rejected=rejected,
    )
