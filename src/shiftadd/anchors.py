"""
Anchor detection for cross-correlation.

Detects bright apertures (connected groups of pixels above a robust
threshold) in the reference frame and returns the position of the largest
one, to be used as correlation anchor when none is supplied.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy import ndimage

from .config import Frame
from .errors import DataNotFoundError, IllegalInputError

logger = logging.getLogger(__name__)

DEFAULT_SIGMAS = (5.0, 2.0, 1.0, 0.5)


@dataclass
class Aperture:
    """A detected group of connected pixels."""

    x: float  # Mean column of the member pixels
    y: float  # Mean row of the member pixels
    npix: int
    flux: float


def median_deviation(image: np.ndarray) -> tuple[float, float]:
    """Median of the image and mean absolute deviation from it."""
    data = np.asarray(image, dtype=np.float64)
    median = float(np.median(data))
    return median, float(np.mean(np.abs(data - median)))


def detect_apertures(image, sigma: float) -> list[Aperture]:
    """
    Detect apertures brighter than ``median + sigma * deviation``.

    Parameters
    ----------
    image : np.ndarray, np.ma.MaskedArray or Frame
        Image to search.
    sigma : float
        Detection threshold in units of the mean absolute deviation.

    Returns
    -------
    list[Aperture]
        Apertures sorted by decreasing number of pixels (may be empty).

    Notes
    -----
    Single-pixel detections are removed with a 3x3 binary opening before
    the regions are labelled (4-connectivity).
    """
    if sigma <= 0:
        raise IllegalInputError(f"Detection sigma must be positive, got {sigma}")
    data = Frame.from_array(image).data

    median, deviation = median_deviation(data)
    threshold = median + sigma * deviation
    selection = data > threshold

    struct = np.ones((3, 3), dtype=bool)
    selection = ndimage.binary_opening(selection, structure=struct, border_value=0)

    labeled, n_features = ndimage.label(selection)
    if n_features == 0:
        return []

    index = np.arange(1, n_features + 1)
    npix = ndimage.sum(selection, labeled, index)
    flux = ndimage.sum(data, labeled, index)
    centres = ndimage.center_of_mass(selection, labeled, index)

    apertures = [
        Aperture(x=float(cx), y=float(cy), npix=int(n), flux=float(f))
        for (cy, cx), n, f in zip(centres, npix, flux)
    ]
    apertures.sort(key=lambda a: -a.npix)

    logger.debug(
        "sigma=%.2f threshold=%.4g: %d aperture(s)", sigma, threshold, len(apertures)
    )
    return apertures


def detect_anchor(image, sigmas=DEFAULT_SIGMAS) -> tuple[tuple[int, int], int]:
    """
    Position of the largest aperture, trying each sigma in turn.

    Parameters
    ----------
    image : np.ndarray, np.ma.MaskedArray or Frame
        Reference frame.
    sigmas : sequence of float, default (5, 2, 1, 0.5)
        Detection thresholds tried in order until one finds an aperture.
        Non-positive values are skipped.

    Returns
    -------
    tuple
        ((x, y), isigma): integer anchor position and the index of the
        sigma that detected it.

    Raises
    ------
    DataNotFoundError
        If no sigma detects any aperture.
    """
    for isigma, sigma in enumerate(sigmas):
        if sigma <= 0:
            continue
        apertures = detect_apertures(image, sigma)
        if apertures:
            best = apertures[0]
            anchor = (int(best.x), int(best.y))
            logger.info(
                "Anchor at (%d, %d) from %d-pixel aperture (sigma=%.2f)",
                anchor[0], anchor[1], best.npix, sigma,
            )
            return anchor, isigma

    raise DataNotFoundError(f"No aperture detected with sigmas {tuple(sigmas)}")
