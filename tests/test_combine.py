"""
Tests for the combine module.

Tests cover:
- Output canvas for the three geometry modes
- Identity and integer-shift combination
- Trimmed mean with outlier rejection
- Bad-sample masks and sub-pixel interpolation
- Combination statistics

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import numpy as np
import pytest

from shiftadd.combine import (
    compute_canvas,
    compute_combine_statistics,
    combine_frames,
    seed_contribution,
)
from shiftadd.config import Frame, GeometryMode
from shiftadd.errors import (
    IllegalInputError,
    IllegalOutputError,
    IncompatibleInputError,
    InvalidTypeError,
    NullInputError,
)


class TestComputeCanvas:
    """Tests for canvas geometry."""

    def test_intersect(self):
        canvas = compute_canvas(np.array([[0, 0], [3, -2]]), (20, 30), "intersect")
        assert (canvas.start_x, canvas.start_y) == (3.0, 0.0)
        assert canvas.shape == (18, 27)

    def test_union(self):
        canvas = compute_canvas(np.array([[0, 0], [3, -2]]), (20, 30), "union")
        assert (canvas.start_x, canvas.start_y) == (0.0, -2.0)
        assert canvas.shape == (22, 33)

    def test_first(self):
        canvas = compute_canvas(np.array([[0, 0], [3, -2]]), (20, 30), GeometryMode.FIRST)
        assert (canvas.start_x, canvas.start_y) == (0.0, 0.0)
        assert canvas.shape == (20, 30)

    def test_union_ignores_rejected_extremes(self):
        """With rejection, the extreme offsets do not widen the union."""
        offsets = np.array([[0, 0], [1, 0], [2, 0], [3, 0], [10, 0]])
        canvas = compute_canvas(offsets, (20, 30), "union", rmin=1, rmax=1)
        assert canvas.start_x == 1.0
        assert canvas.nx == 30 + 3 - 1

    def test_fractional_intersect(self):
        canvas = compute_canvas(np.array([[0.0, 0.0], [0.5, 0.25]]), (20, 30), "intersect")
        assert (canvas.start_x, canvas.start_y) == (0.5, 0.25)
        assert canvas.shape == (19, 29)

    def test_empty_intersection_raises(self):
        with pytest.raises(IllegalOutputError, match="do not intersect"):
            compute_canvas(np.array([[0, 0], [40, 0]]), (20, 30), "intersect")


class TestCombineIdentity:
    """A single frame at offset 0 is returned unchanged."""

    @pytest.mark.parametrize("geometry", ["intersect", "union", "first"])
    def test_single_frame(self, geometry):
        rng = np.random.default_rng(0)
        frame = rng.uniform(0, 1000, (12, 15)).astype(np.float32)
        result = combine_frames([frame], [[0.0, 0.0]], geometry=geometry)

        assert result.image.dtype == np.float32
        assert np.array_equal(result.image, frame)
        assert np.all(result.contribution == 1)
        assert not result.rejected.any()
        assert result.origin == (0.0, 0.0)
        assert result.frame_indices == [0]


class TestCombineGeometry:
    """Two frames offset by an integer shift along x."""

    d = 4

    def _frames(self):
        rng = np.random.default_rng(1)
        reference = rng.uniform(0, 100, (10, 20))
        # T[y, x] = R[y, x + d]
        target = np.zeros_like(reference)
        target[:, :20 - self.d] = reference[:, self.d:]
        return reference, target

    def test_intersect(self):
        reference, target = self._frames()
        result = combine_frames([reference, target], [[0, 0], [self.d, 0]], geometry="intersect")

        assert result.shape == (10, 20 - self.d)
        assert np.allclose(result.image, reference[:, self.d:])
        assert np.all(result.contribution == 2)
        assert result.origin == (-self.d, 0.0)

    def test_union(self):
        reference, target = self._frames()
        result = combine_frames([reference, target], [[0, 0], [self.d, 0]], geometry="union")

        assert result.shape == (10, 20 + self.d)
        assert np.all(result.contribution[:, :self.d] == 1)
        assert np.all(result.contribution[:, self.d:20] == 2)
        assert np.all(result.contribution[:, 20:] == 1)
        assert np.allclose(result.image[:, :self.d], reference[:, :self.d])
        assert result.origin == (0.0, 0.0)

    def test_first(self):
        reference, target = self._frames()
        result = combine_frames([reference, target], [[0, 0], [self.d, 0]], geometry="first")

        assert result.shape == (10, 20)
        assert np.all(result.contribution[:, :self.d] == 1)
        assert np.all(result.contribution[:, self.d:] == 2)
        assert np.allclose(result.image[:, self.d:], reference[:, self.d:])
        assert np.allclose(result.image[:, :self.d], reference[:, :self.d])


class TestFastPath:
    """Tests for sum-and-count accumulation."""

    def test_counter_wraps_past_255_frames(self, flat_stack):
        values = [i % 7 for i in range(300)]
        result = combine_frames(flat_stack(values, height=8, width=8), np.zeros((300, 2)))

        assert result.contribution.dtype == np.int32
        assert np.all(result.contribution == 300)
        assert np.allclose(result.image, sum(values) / 300)
        assert np.isclose(result.image[0, 0], 2.99)

    def test_exactly_256_frames(self, flat_stack):
        result = combine_frames(flat_stack([2.0] * 256, height=4, width=4), np.zeros((256, 2)))
        assert np.all(result.contribution == 256)
        assert np.allclose(result.image, 2.0)


class TestTrimmedMean:
    """Tests for per-pixel outlier rejection."""

    def test_constant_frames(self, flat_stack):
        """Interior pixels average the middle values, the 2-pixel border is rejected."""
        n = 10
        values = [5, 9, 0, 3, 8, 1, 7, 2, 6, 4]
        frames = flat_stack(values, height=16, width=16)
        result = combine_frames(frames, np.zeros((n, 2)), rmin=2, rmax=2)

        interior = (slice(2, 14), slice(2, 14))
        assert np.allclose(result.image[interior], np.mean(range(2, 8)))
        assert np.all(result.contribution[interior] == n - 4)

        border = np.ones((16, 16), dtype=bool)
        border[interior] = False
        assert np.all(result.contribution[border] == 0)
        assert np.all(result.image[border] == 0)
        assert np.all(result.rejected == border)

    def test_middle_integers(self, flat_stack):
        """Values N-i-N/5 with rmin=N/5, rmax=N/4 average to (N-rmin-rmax+1)/2."""
        n = 20
        rmin, rmax = n // 5, n // 4
        frames = flat_stack([float(n - i - n // 5) for i in range(n)])
        result = combine_frames(frames, np.zeros((n, 2)), rmin=rmin, rmax=rmax, geometry="intersect")

        assert np.allclose(result.image[2:-2, 2:-2], (n - rmin - rmax + 1) / 2)
        assert np.all(result.contribution[2:-2, 2:-2] == n - rmin - rmax)

    def test_matches_sorted_trimmed_mean(self):
        """Random samples give the trimmed mean of their sorted values."""
        rng = np.random.default_rng(2)
        n, rmin, rmax = 9, 1, 2
        stack = rng.normal(100, 10, (n, 40, 24))
        result = combine_frames(list(stack), np.zeros((n, 2)), rmin=rmin, rmax=rmax, chunk_rows=7)

        expected = np.sort(stack, axis=0)[rmin:n - rmax].mean(axis=0)
        assert np.allclose(result.image[2:-2, 2:-2], expected[2:-2, 2:-2])
        assert np.all(result.contribution[2:-2, 2:-2] == n - rmin - rmax)

    def test_outlier_rejected(self, flat_stack):
        """A single hot frame is removed by rmax=1."""
        frames = flat_stack([100.0] * 9 + [10000.0])
        result = combine_frames(frames, np.zeros((10, 2)), rmin=0, rmax=1)
        assert np.allclose(result.image[2:-2, 2:-2], 100.0)

    def test_rejection_disabled_for_small_stacks(self, flat_stack):
        """Three frames are averaged even when rejection is requested."""
        frames = flat_stack([1.0, 2.0, 6.0])
        result = combine_frames(frames, np.zeros((3, 2)), rmin=1, rmax=1)
        assert np.allclose(result.image, 3.0)
        assert np.all(result.contribution == 3)

    def test_chunking_does_not_change_result(self):
        rng = np.random.default_rng(4)
        stack = list(rng.normal(0, 1, (6, 33, 20)))
        offsets = np.array([[0, 0], [1, 0], [0, 2], [-1, 1], [2, -1], [1, 1]], dtype=float)
        a = combine_frames(stack, offsets, rmin=1, rmax=1, chunk_rows=1)
        b = combine_frames(stack, offsets, rmin=1, rmax=1, chunk_rows=50)
        assert np.allclose(a.image, b.image)
        assert np.array_equal(a.contribution, b.contribution)


class TestBadSamples:
    """Tests for masked inputs."""

    def test_masked_sample_excluded(self, flat_stack):
        frames = flat_stack([1.0, 2.0, 3.0])
        mask = np.zeros((16, 16), dtype=bool)
        mask[5, 6] = True
        stack = [frames[0], frames[1], Frame(frames[2], mask)]
        result = combine_frames(stack, np.zeros((3, 2)))

        assert result.contribution[5, 6] == 2
        assert np.isclose(result.image[5, 6], 1.5)
        assert result.contribution[8, 8] == 3
        assert np.isclose(result.image[8, 8], 2.0)

    def test_masked_array_input(self, flat_stack):
        frames = flat_stack([1.0, 2.0, 3.0])
        masked = np.ma.MaskedArray(frames[0], mask=np.zeros((16, 16), dtype=bool))
        masked.mask[7, 7] = True
        result = combine_frames([masked, frames[1], frames[2]], np.zeros((3, 2)))

        assert result.contribution[7, 7] == 2
        assert np.isclose(result.image[7, 7], 2.5)

    def test_fully_masked_pixel_rejected(self, flat_stack):
        frames = flat_stack([1.0, 2.0])
        mask = np.zeros((16, 16), dtype=bool)
        mask[4, 4] = True
        result = combine_frames([Frame(f, mask) for f in frames], np.zeros((2, 2)))

        assert result.contribution[4, 4] == 0
        assert result.rejected[4, 4]
        assert result.image[4, 4] == 0.0
        assert result.to_masked().mask[4, 4]

    def test_bad_sample_spreads_over_interpolation_taps(self, flat_stack):
        """A bad sample voids every output pixel whose 4x4 taps read it."""
        frames = flat_stack([1.0, 3.0], height=24, width=24)
        mask = np.zeros((24, 24), dtype=bool)
        mask[10, 10] = True
        stack = [frames[0], Frame(frames[1], mask)]
        result = combine_frames(stack, [(0, 0), (-0.5, -0.5)], geometry="first")

        assert np.all(result.contribution[8:12, 8:12] == 1)
        assert np.allclose(result.image[8:12, 8:12], 1.0)
        for y, x in [(7, 7), (7, 10), (10, 12), (12, 12), (5, 5)]:
            assert result.contribution[y, x] == 2
        assert np.isclose(result.image[5, 5], 2.0)
        assert not result.rejected.any()

    def test_seed_contribution(self):
        mask = np.array([[False, True], [False, False]])
        assert np.array_equal(seed_contribution(mask, (2, 2)), [[1, 0], [1, 1]])
        assert np.array_equal(seed_contribution(None, (1, 2)), [[1, 1]])


class TestSubpixel:
    """Tests for interpolated placement."""

    @pytest.mark.parametrize("kernel", ["tanh", "sinc", "lanczos", "hamming"])
    def test_constant_is_preserved(self, flat_stack, kernel):
        """Normalised weights reproduce a constant frame."""
        frames = flat_stack([7.0, 7.0], height=20, width=24)
        result = combine_frames(frames, [[0.0, 0.0], [0.5, 0.25]], kernel=kernel)

        assert result.shape == (19, 23)
        assert np.allclose(result.image, 7.0)
        assert np.all(result.contribution[2:-2, 2:-2] == 2)
        assert result.origin == (-0.5, -0.25)

    def test_nearest_picks_closest_sample(self):
        """The nearest kernel copies the closest source sample."""
        rng = np.random.default_rng(8)
        reference = rng.uniform(0, 10, (20, 20))
        result = combine_frames(
            [reference, reference.copy()], [[0.0, 0.0], [0.6, 0.0]],
            kernel="nearest", geometry="first",
        )
        # Output column i of frame 1 lies at source column i - 0.6
        assert np.allclose(result.image[5:15, 5:15], 0.5 * (reference[5:15, 5:15] + reference[5:15, 4:14]))


class TestCombineValidation:
    """Argument checks."""

    def test_int_frames_raise(self):
        frames = [np.ones((8, 8), dtype=np.int32)] * 2
        with pytest.raises(InvalidTypeError, match="float32 or float64"):
            combine_frames(frames, np.zeros((2, 2)))

    def test_mixed_dtypes_raise(self):
        frames = [np.ones((8, 8), dtype=np.float32), np.ones((8, 8), dtype=np.float64)]
        with pytest.raises(IncompatibleInputError, match="dtype"):
            combine_frames(frames, np.zeros((2, 2)))

    def test_mixed_shapes_raise(self):
        frames = [np.ones((8, 8)), np.ones((8, 9))]
        with pytest.raises(IncompatibleInputError, match="shape"):
            combine_frames(frames, np.zeros((2, 2)))

    def test_offset_count_mismatch_raises(self):
        with pytest.raises(IncompatibleInputError, match="offsets"):
            combine_frames([np.ones((8, 8))] * 3, np.zeros((2, 2)))

    def test_none_offsets_raise(self):
        with pytest.raises(NullInputError):
            combine_frames([np.ones((8, 8))], None)

    def test_empty_stack_raises(self):
        with pytest.raises(IllegalInputError, match="empty"):
            combine_frames([], np.zeros((0, 2)))

    def test_negative_rejection_raises(self):
        with pytest.raises(IllegalInputError, match="non-negative"):
            combine_frames([np.ones((8, 8))] * 5, np.zeros((5, 2)), rmin=-1)


class TestCombineStatistics:
    """Tests for compute_combine_statistics."""

    def test_basic(self, flat_stack):
        frames = flat_stack(list(range(10)))
        result = combine_frames(frames, np.zeros((10, 2)), rmin=1, rmax=1)
        stats = compute_combine_statistics(result, n_frames=12)

        assert stats.n_frames == 12
        assert stats.max_contribution == 8
        assert stats.min_contribution == 0
        assert np.isclose(stats.rejected_fraction, 1 - (12 * 12) / (16 * 16))
