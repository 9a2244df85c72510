"""
Configuration and data-model dataclasses for the shiftadd engine.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .errors import IllegalInputError, NullInputError
from .kernel import Kernel


class GeometryMode(Enum):
    """Placement and size policy of the output canvas."""

    INTERSECT = "intersect"  # Region covered by every frame
    UNION = "union"  # Region covered by any frame (trimmed by rejection)
    FIRST = "first"  # Canvas of the first frame

    @classmethod
    def parse(cls, value: GeometryMode | str) -> GeometryMode:
        """Return the mode named by ``value`` (case-insensitive)."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            choices = ", ".join(m.value for m in cls)
            raise IllegalInputError(
                f"Unknown geometry mode {value!r}, expected one of: {choices}"
            ) from None


class RejectionReason(Enum):
    """Reason codes for dropping a frame before combination."""

    NOT_CORRELATED = "not_correlated"  # No anchor validated
    SEARCH_BOUNDARY = "search_boundary"  # Best shift ran off the search window


@dataclass
class RejectedFrame:
    """Record of a frame dropped by the registration pipeline."""

    index: int
    reason: RejectionReason
    detail: str = ""


@dataclass
class Frame:
    """
    A 2-D sample grid with an optional bad-sample mask.

    ``mask`` is True where a sample is bad. Frames are treated as read-only
    by every operation of the package.
    """

    data: np.ndarray
    mask: np.ndarray | None = None

    def __post_init__(self) -> None:
        self.data = np.asarray(self.data)
        if self.data.ndim != 2:
            raise IllegalInputError(
                f"Frame data must be 2-D, got shape {self.data.shape}"
            )
        if self.mask is not None:
            self.mask = np.asarray(self.mask, dtype=bool)
            if self.mask.shape != self.data.shape:
                raise IllegalInputError(
                    f"Mask shape {self.mask.shape} does not match "
                    f"data shape {self.data.shape}"
                )

    @classmethod
    def from_array(cls, obj) -> Frame:
        """Wrap an ndarray, a MaskedArray or an existing Frame."""
        if obj is None:
            raise NullInputError("Frame is None")
        if isinstance(obj, Frame):
            return obj
        if isinstance(obj, np.ma.MaskedArray):
            mask = None
            if obj.mask is not np.ma.nomask:
                mask = np.ma.getmaskarray(obj)
            return cls(np.ma.getdata(obj), mask)
        return cls(obj)

    @property
    def shape(self) -> tuple[int, int]:
        return self.data.shape

    @property
    def height(self) -> int:
        return self.data.shape[0]

    @property
    def width(self) -> int:
        return self.data.shape[1]

    @property
    def dtype(self) -> np.dtype:
        return self.data.dtype

    @property
    def has_bad_samples(self) -> bool:
        """True when the mask exists and flags at least one sample."""
        return self.mask is not None and bool(self.mask.any())


def as_frames(frames) -> list[Frame]:
    """Convert a sequence (or 3-D array) of images into a list of Frames."""
    if frames is None:
        raise NullInputError("Frame stack is None")
    result = [Frame.from_array(f) for f in frames]
    if not result:
        raise IllegalInputError("Frame stack is empty")
    return result


@dataclass
class SearchSpec:
    """
    Half-extents of the correlation search and of the measurement window.

    A candidate shift ``(k, l)`` ranges over ``[-s_hx, s_hx] x [-s_hy, s_hy]``
    and is scored over a window of ``(2*m_hx+1) x (2*m_hy+1)`` samples.
    """

    s_hx: int = 15
    """Search half-width (pixels)."""

    s_hy: int = 15
    """Search half-height (pixels)."""

    m_hx: int = 15
    """Measurement half-width (pixels)."""

    m_hy: int = 15
    """Measurement half-height (pixels)."""

    def validate(self) -> None:
        """Validate half-extents, raising IllegalInputError if invalid."""
        for name in ("s_hx", "s_hy", "m_hx", "m_hy"):
            value = getattr(self, name)
            if int(value) != value or value < 0:
                raise IllegalInputError(
                    f"{name} must be a non-negative integer, got {value}"
                )


@dataclass
class RejectionPolicy:
    """Number of lowest/highest samples discarded per output pixel."""

    rmin: int = 0
    rmax: int = 0

    def validate(self) -> None:
        """Validate counts, raising IllegalInputError if invalid."""
        if self.rmin < 0 or self.rmax < 0:
            raise IllegalInputError(
                f"Rejection counts must be non-negative, got "
                f"rmin={self.rmin}, rmax={self.rmax}"
            )

    def effective(self, n_frames: int) -> tuple[int, int]:
        """
        Return the counts applied to a stack of ``n_frames`` frames.

        Rejection is disabled when the stack holds 3 frames or fewer, or
        when it would not leave more samples than it discards.
        """
        self.validate()
        if n_frames > 3 and n_frames > 2 * (self.rmin + self.rmax):
            return self.rmin, self.rmax
        return 0, 0


@dataclass
class CorrelationSample:
    """Best candidate for one anchor: sub-pixel delta and its MSD score."""

    dx: float
    dy: float
    score: float  # Negative when the anchor could not be measured

    @property
    def valid(self) -> bool:
        return self.score >= 0


@dataclass
class OffsetEstimate:
    """Refined offset of a frame relative to the reference."""

    dx: float
    dy: float
    quality: float  # MSD of the chosen anchor, -1 if not registrable

    @property
    def registered(self) -> bool:
        return self.quality >= 0


@dataclass
class CombinedResult:
    """Output of a combination: image, contribution map and placement."""

    image: np.ndarray
    """Combined samples, same dtype as the inputs, 0 where rejected."""

    contribution: np.ndarray
    """Number of samples averaged per output pixel (int32)."""

    rejected: np.ndarray
    """Bad-pixel map of the output (True where no sample survived)."""

    origin: tuple[float, float]
    """Position (x, y) of the reference frame origin in the output canvas."""

    offsets: np.ndarray = field(default_factory=lambda: np.zeros((0, 2)))
    """Offsets (dx, dy) of the frames actually combined."""

    frame_indices: list[int] = field(default_factory=list)
    """Indices, in the caller's stack, of the frames actually combined."""

    @property
    def shape(self) -> tuple[int, int]:
        return self.image.shape

    def to_masked(self) -> np.ma.MaskedArray:
        """Return the combined image as a numpy masked array."""
        return np.ma.MaskedArray(self.image, mask=self.rejected.copy())


@dataclass
class RegistrationConfig:
    """
    Configuration for registration and combination of a frame stack.

    All parameters are explicitly documented and have sensible defaults.
    """

    # --- Correlation ---
    s_hx: int = 15
    """Search half-width (pixels)."""

    s_hy: int = 15
    """Search half-height (pixels)."""

    m_hx: int = 15
    """Measurement half-width (pixels)."""

    m_hy: int = 15
    """Measurement half-height (pixels)."""

    refine: bool = True
    """Refine the prior offsets by cross-correlation before combining."""

    prefilter: bool = True
    """Smooth frames with a 3x3 median filter before correlating."""

    boundary_tolerance: float = 1.0
    """Distance (pixels) to the search edge below which a shift is rejected."""

    sigmas: tuple[float, ...] = (5.0, 2.0, 1.0, 0.5)
    """Detection thresholds tried in turn when no anchor is supplied."""

    # --- Combination ---
    rmin: int = 0
    """Number of lowest samples rejected per pixel."""

    rmax: int = 0
    """Number of highest samples rejected per pixel."""

    geometry: GeometryMode = GeometryMode.INTERSECT
    """Output canvas policy: intersect, union or first."""

    kernel: Kernel = Kernel.TANH
    """Interpolation kernel used for sub-pixel resampling."""

    def __post_init__(self) -> None:
        self.geometry = GeometryMode.parse(self.geometry)
        self.kernel = Kernel.parse(self.kernel)

    def search_spec(self) -> SearchSpec:
        return SearchSpec(self.s_hx, self.s_hy, self.m_hx, self.m_hy)

    def rejection_policy(self) -> RejectionPolicy:
        return RejectionPolicy(self.rmin, self.rmax)

    def validate(self) -> None:
        """Validate configuration parameters."""
        self.search_spec().validate()
        self.rejection_policy().validate()
        if self.boundary_tolerance < 0:
            raise IllegalInputError(
                f"boundary_tolerance must be non-negative, got {self.boundary_tolerance}"
            )
        if not any(s > 0 for s in self.sigmas):
            raise IllegalInputError(
                f"At least one detection sigma must be positive, got {self.sigmas}"
            )
