"""
Pytest configuration and fixtures.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest


def gaussian_star(height, width, x0, y0, sigma=2.5, amplitude=1000.0, background=100.0):
    """Single 2-D Gaussian star on a flat background (float64)."""
    yy, xx = np.mgrid[0:height, 0:width]
    star = amplitude * np.exp(-((xx - x0) ** 2 + (yy - y0) ** 2) / (2 * sigma ** 2))
    return background + star


def shifted(reference, dx, dy):
    """Target frame T with T[y, x] == R[y + dy, x + dx] for integer shifts."""
    return np.roll(reference, (-dy, -dx), axis=(0, 1))


@pytest.fixture
def star_frame():
    """Create a frame holding one Gaussian star."""
    def _create(height=64, width=64, x0=40.0, y0=20.0, sigma=2.5,
                amplitude=1000.0, background=100.0, dtype=np.float64):
        return gaussian_star(height, width, x0, y0, sigma, amplitude, background).astype(dtype)

    return _create


@pytest.fixture
def shifted_stack(star_frame):
    """Create a stack of integer-shifted copies of a single-star frame."""
    def _create(shifts, height=64, width=64, x0=40, y0=20, dtype=np.float64):
        reference = star_frame(height, width, x0, y0, dtype=dtype)
        return [shifted(reference, dx, dy) for dx, dy in shifts]

    return _create


@pytest.fixture
def synthetic_star_field():
    """Create a synthetic star field with Gaussian stars."""
    def _create(height=200, width=200, n_stars=20, background=1000, seed=42):
        rng = np.random.default_rng(seed)

        # Background
        image = np.full((height, width), background, dtype=np.float64)

        # Add Gaussian noise
        image += rng.normal(0, 50, (height, width))

        # Add stars (2D Gaussians)
        yy, xx = np.mgrid[0:height, 0:width]
        for _ in range(n_stars):
            y0 = rng.uniform(10, height - 10)
            x0 = rng.uniform(10, width - 10)
            sigma = rng.uniform(2, 5)
            amplitude = rng.uniform(5000, 50000)

            image += amplitude * np.exp(-((xx - x0)**2 + (yy - y0)**2) / (2 * sigma**2))

        return np.clip(image, 0, 65535).astype(np.float32)

    return _create


@pytest.fixture
def flat_stack():
    """Create a stack of constant frames, one value per frame."""
    def _create(values, height=16, width=16, dtype=np.float64):
        return [np.full((height, width), v, dtype=dtype) for v in values]

    return _create
