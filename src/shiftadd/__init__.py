"""
shiftadd - Sub-pixel registration and shift-and-add stacking of 2-D frames.

Aligns a series of frames that differ by an unknown sub-pixel translation
using local cross-correlation, and combines them onto a common canvas with
separable kernel resampling and per-pixel outlier rejection.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com

Example
-------
>>> from shiftadd import register_and_combine, SearchSpec, RejectionPolicy
>>> result = register_and_combine(
...     frames, prior_offsets,
...     search=SearchSpec(15, 15, 15, 15),
...     rejection=RejectionPolicy(1, 1),
...     geometry="union",
... )
>>> result.image, result.contribution

Example (known offsets)
-----------------------
>>> from shiftadd import combine_frames
>>> result = combine_frames(frames, offsets, rmin=1, rmax=1)
"""

from .config import (
    CombinedResult,
    CorrelationSample,
    Frame,
    GeometryMode,
    OffsetEstimate,
    RegistrationConfig,
    RejectedFrame,
    RejectionPolicy,
    RejectionReason,
    SearchSpec,
)
from .errors import (
    DataNotFoundError,
    IllegalInputError,
    IllegalOutputError,
    IncompatibleInputError,
    InvalidTypeError,
    NullInputError,
    ShiftAddError,
)
from .utils import __version__, __version_info__, get_version_banner

# Interpolation kernels
from .kernel import (
    TABS_PER_PIXEL,
    Kernel,
    kernel_profile,
    tap_weights,
    validate_profile,
)

# Partial selection
from .select import select_extremes

# Offset refinement
from .refine import (
    correlation_grid,
    load_offsets,
    refine_offset,
    refine_offsets,
    save_offsets,
)

# Shift-and-add
from .combine import (
    Canvas,
    CombineStatistics,
    combine_frames,
    compute_canvas,
    compute_combine_statistics,
    seed_contribution,
)

# Anchor detection
from .anchors import Aperture, detect_anchor, detect_apertures

# Pipeline
from .pipeline import (
    combine_registered,
    register_and_combine,
    register_stack,
    run_registration,
)

# I/O functions
from .io import (
    list_frames,
    read_anchors,
    read_frame,
    read_frames,
    read_header,
    read_offsets,
    write_combined,
    write_frame,
    write_offsets,
)

__all__ = [
    # Version
    "__version__",
    "__version_info__",
    "get_version_banner",
    # Data model / config
    "Frame",
    "GeometryMode",
    "SearchSpec",
    "RejectionPolicy",
    "CorrelationSample",
    "OffsetEstimate",
    "CombinedResult",
    "RegistrationConfig",
    "RejectedFrame",
    "RejectionReason",
    # Errors
    "ShiftAddError",
    "NullInputError",
    "IllegalInputError",
    "IncompatibleInputError",
    "InvalidTypeError",
    "DataNotFoundError",
    "IllegalOutputError",
    # Kernels
    "TABS_PER_PIXEL",
    "Kernel",
    "kernel_profile",
    "tap_weights",
    "validate_profile",
    # Selection
    "select_extremes",
    # Refinement
    "correlation_grid",
    "refine_offset",
    "refine_offsets",
    "save_offsets",
    "load_offsets",
    # Combination
    "Canvas",
    "CombineStatistics",
    "combine_frames",
    "compute_canvas",
    "compute_combine_statistics",
    "seed_contribution",
    # Anchors
    "Aperture",
    "detect_anchor",
    "detect_apertures",
    # Pipeline
    "register_and_combine",
    "register_stack",
    "combine_registered",
    "run_registration",
    # I/O
    "list_frames",
    "read_frame",
    "read_frames",
    "read_header",
    "read_offsets",
    "read_anchors",
    "write_frame",
    "write_combined",
    "write_offsets",
]
