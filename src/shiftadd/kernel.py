"""
Interpolation kernel profiles for sub-pixel resampling.

A profile is a 1-D table of kernel values sampled at ``TABS_PER_PIXEL``
phases per pixel, from distance 0 up to the kernel radius. The combiner
reads it separably along X and Y with 4 taps per axis.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from enum import Enum
from functools import lru_cache

import numpy as np

from .errors import IllegalInputError

logger = logging.getLogger(__name__)

TABS_PER_PIXEL = 1000
"""Number of sub-pixel phase subdivisions per pixel."""

DEFAULT_RADIUS = 2.0
DEFAULT_SAMPLES = 1 + int(TABS_PER_PIXEL * DEFAULT_RADIUS)

TANH_STEEPNESS = 5.0
_TANH_POINTS = 32768


class Kernel(Enum):
    """Interpolation kernel families."""

    TANH = "tanh"  # Smooth approximation of a box filter in Fourier space
    DEFAULT = "tanh"
    SINC = "sinc"
    SINC2 = "sinc2"
    LANCZOS = "lanczos"
    HAMMING = "hamming"
    HANN = "hann"
    NEAREST = "nearest"

    @classmethod
    def parse(cls, value: Kernel | str) -> Kernel:
        """Return the kernel named by ``value`` (case-insensitive)."""
        if isinstance(value, cls):
            return value
        name = str(value).lower()
        try:
            return cls(name)
        except ValueError:
            if name.upper() in cls.__members__:
                return cls[name.upper()]
            choices = ", ".join(k.value for k in cls)
            raise IllegalInputError(
                f"Unknown kernel {value!r}, expected one of: {choices}"
            ) from None


def _sinc(x: np.ndarray) -> np.ndarray:
    """sin(pi x) / (pi x), exactly 0 at non-zero integers."""
    out = np.sinc(x)
    out[(x != 0) & (x == np.round(x))] = 0.0
    return out


def _tanh_profile(samples: int, width: float) -> np.ndarray:
    """
    Inverse Fourier transform of a tanh-apodized box.

    Parameters
    ----------
    samples : int
        Number of profile values to return.
    width : float
        Half of the number of profile values per pixel.
    """
    if samples > _TANH_POINTS:
        raise IllegalInputError(
            f"Profile length {samples} exceeds maximum of {_TANH_POINTS}"
        )
    n = _TANH_POINTS
    idx = np.arange(n, dtype=np.float64)
    idx[n // 2:] -= n
    freq = idx * width * 2.0 / n

    s = TANH_STEEPNESS
    spectrum = ((np.tanh(s * (freq + 0.5)) + 1) / 2) * ((np.tanh(s * (-freq + 0.5)) + 1) / 2)

    # ifft carries the 1/n normalisation
    image = np.fft.ifft(spectrum).real
    return 2.0 * width * image[:samples]


def kernel_profile(
    kernel: Kernel | str = Kernel.TANH,
    radius: float = DEFAULT_RADIUS,
    samples: int = DEFAULT_SAMPLES,
) -> np.ndarray:
    """
    Sample an interpolation kernel from distance 0 to ``radius``.

    Parameters
    ----------
    kernel : Kernel or str, default Kernel.TANH
        Kernel family.
    radius : float, default 2.0
        Largest distance (pixels) covered by the profile.
    samples : int, default 2001
        Number of profile values. Sample ``i`` is at distance
        ``i * radius / (samples - 1)``.

    Returns
    -------
    np.ndarray
        Profile values (float64).

    Raises
    ------
    IllegalInputError
        If radius is not positive, samples < 1, or the tanh profile is
        longer than its 32768-point transform.
    """
    kernel = Kernel.parse(kernel)
    if radius <= 0:
        raise IllegalInputError(f"Kernel radius must be positive, got {radius}")
    if samples < 1:
        raise IllegalInputError(f"Profile needs at least one sample, got {samples}")

    dx = radius / (samples - 1) if samples > 1 else 1.0
    x = np.arange(samples, dtype=np.float64) * dx

    if kernel is Kernel.TANH:
        profile = _tanh_profile(samples, 0.5 / dx)
    elif kernel is Kernel.SINC:
        profile = _sinc(x)
    elif kernel is Kernel.SINC2:
        profile = _sinc(x) ** 2
    elif kernel is Kernel.LANCZOS:
        profile = np.where(x < 2, _sinc(x) * _sinc(x / 2), 0.0)
    elif kernel in (Kernel.HAMMING, Kernel.HANN):
        alpha = 0.54 if kernel is Kernel.HAMMING else 0.50
        profile = np.where(x < 1, (alpha + (1 - alpha) * np.cos(np.pi * x)) * _sinc(x), 0.0)
    else:
        profile = np.where(x < 0.5, 1.0, 0.0)

    logger.debug("Kernel profile %s: %d samples, radius %.2f", kernel.value, samples, radius)
    return profile


@lru_cache(maxsize=8)
def _cached_profile(kernel: Kernel) -> np.ndarray:
    profile = kernel_profile(kernel)
    profile.setflags(write=False)
    return profile


def default_profile(kernel: Kernel | str = Kernel.TANH) -> np.ndarray:
    """Return the read-only profile of ``kernel`` at default radius and sampling."""
    return _cached_profile(Kernel.parse(kernel))


def validate_profile(profile: np.ndarray, tabs_per_pixel: int = TABS_PER_PIXEL) -> np.ndarray:
    """
    Check that a profile can feed 4-tap interpolation.

    The table must hold a whole number of pixels of phases and cover at
    least two pixels.
    """
    profile = np.asarray(profile, dtype=np.float64)
    if profile.ndim != 1:
        raise IllegalInputError(f"Kernel profile must be 1-D, got shape {profile.shape}")
    n = profile.size
    if (n - 1) % tabs_per_pixel != 0 or n < 2 * tabs_per_pixel + 1:
        raise IllegalInputError(
            f"Kernel profile length {n} is incompatible with "
            f"{tabs_per_pixel} phases per pixel"
        )
    return profile


def phase_index(frac: float) -> int:
    """Nearest table index of a sub-pixel phase in [0, 1)."""
    return int(0.5 + frac * TABS_PER_PIXEL)


def tap_weights(profile: np.ndarray, tab: int) -> np.ndarray:
    """
    Weights of the 4 taps at relative positions -1, 0, +1, +2.

    ``tab`` is the phase index of the output sample measured from tap 0.
    """
    T = TABS_PER_PIXEL
    return np.array(
        [profile[T + tab], profile[tab], profile[T - tab], profile[2 * T - tab]],
        dtype=np.float64,
    )


def separable_weights(profile: np.ndarray, tabx: int, taby: int) -> tuple[np.ndarray, np.ndarray]:
    """
    X and Y tap weights for one phase pair, normalised jointly.

    The Y weights are divided by the product of both weight sums so that
    the 16-tap outer product sums to 1.
    """
    wx = tap_weights(profile, tabx)
    wy = tap_weights(profile, taby)
    wy /= wx.sum() * wy.sum()
    return wx, wy
