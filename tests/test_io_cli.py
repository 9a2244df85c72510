"""
Tests for FITS and text I/O and for the command-line interface.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

import json
import logging

import numpy as np
import pytest
from astropy.io import fits

from shiftadd.cli import config_from_args, create_parser, main, setup_logging
from shiftadd.cli_output import StageProgress, print_summary_box
from shiftadd.combine import combine_frames
from shiftadd.config import Frame, GeometryMode
from shiftadd.errors import IllegalInputError
from shiftadd.io import (
    list_frames,
    read_anchors,
    read_frame,
    read_header,
    read_offsets,
    write_combined,
    write_frame,
    write_offsets,
)
from shiftadd.utils import format_duration


@pytest.fixture
def fits_stack(tmp_path, shifted_stack):
    """Write a shifted single-star stack as FITS files."""
    def _create(shifts, dtype=np.float32):
        paths = []
        for i, frame in enumerate(shifted_stack(shifts, dtype=dtype)):
            path = tmp_path / f"frame_{i:03d}.fits"
            write_frame(path, Frame(frame))
            paths.append(path)
        return paths

    return _create


class TestFrameIO:
    """Tests for FITS frames."""

    def test_roundtrip_with_mask(self, tmp_path):
        data = np.arange(20, dtype=np.float32).reshape(4, 5)
        mask = np.zeros((4, 5), dtype=bool)
        mask[1, 2] = True
        path = tmp_path / "frame.fits"
        write_frame(path, Frame(data, mask))

        frame = read_frame(path)
        assert frame.dtype == np.float32
        assert np.array_equal(frame.data, data)
        assert np.array_equal(frame.mask, mask)

    def test_integer_data_read_as_float32(self, tmp_path):
        path = tmp_path / "raw.fits"
        fits.PrimaryHDU(np.arange(12, dtype=np.uint16).reshape(3, 4)).writeto(path)
        frame = read_frame(path)
        assert frame.dtype == np.float32
        assert frame.mask is None

    def test_float64_preserved(self, tmp_path):
        path = tmp_path / "double.fits"
        write_frame(path, Frame(np.ones((3, 3))))
        assert read_frame(path).dtype == np.float64

    def test_empty_primary_raises(self, tmp_path):
        path = tmp_path / "empty.fits"
        fits.PrimaryHDU().writeto(path)
        with pytest.raises(IllegalInputError, match="No image data"):
            read_frame(path)

    def test_list_frames_sorted(self, fits_stack, tmp_path):
        paths = fits_stack([(0, 0), (1, 0), (0, 1)])
        assert list_frames(tmp_path) == sorted(paths)

    def test_list_frames_not_a_directory(self, tmp_path):
        with pytest.raises(IllegalInputError, match="not a directory"):
            list_frames(tmp_path / "missing")


class TestCombinedIO:
    """Tests for write_combined."""

    def test_extensions_and_keywords(self, tmp_path, flat_stack):
        result = combine_frames(flat_stack([1.0, 3.0]), [[0, 0], [2, 0]], geometry="union")
        header = fits.Header()
        header["OBJECT"] = "test"
        path = tmp_path / "out" / "combined.fits"
        write_combined(path, result, header=header)

        with fits.open(path) as hdul:
            assert np.allclose(hdul[0].data, result.image)
            assert np.array_equal(hdul["CONTRIB"].data, result.contribution)
            assert np.array_equal(hdul["BPM"].data, result.rejected.astype(np.uint8))
            assert hdul[0].header["SANFRAME"] == 2
            assert hdul[0].header["SAORIGX"] == 0.0
        assert read_header(path)["OBJECT"] == "test"


class TestTextIO:
    """Tests for offset and anchor lists."""

    def test_read_offsets_with_comments(self, tmp_path):
        path = tmp_path / "offsets.txt"
        path.write_text("# dx dy\n0 0\n1.5, -2.25  # second frame\n\n-3 4\n")
        offsets = read_offsets(path)
        assert np.array_equal(offsets, [[0, 0], [1.5, -2.25], [-3, 4]])

    def test_write_read_offsets(self, tmp_path):
        offsets = np.array([[0.0, 0.0], [0.125, -1.5]])
        path = tmp_path / "offsets.txt"
        write_offsets(path, offsets)
        assert np.allclose(read_offsets(path), offsets)

    def test_read_offsets_json(self, tmp_path):
        path = tmp_path / "offsets.json"
        path.write_text(json.dumps({
            "version": "1.0",
            "offsets": [{"dx": 0, "dy": 0, "quality": 0}, {"dx": 1.5, "dy": 2.0, "quality": 3.0}],
        }))
        assert np.array_equal(read_offsets(path), [[0, 0], [1.5, 2.0]])

    def test_bad_line_raises(self, tmp_path):
        path = tmp_path / "offsets.txt"
        path.write_text("0 0\n1 2 3\n")
        with pytest.raises(IllegalInputError, match="expected two values"):
            read_offsets(path)

    def test_read_anchors(self, tmp_path):
        path = tmp_path / "anchors.txt"
        path.write_text("10 20\n30 40\n")
        anchors = read_anchors(path)
        assert anchors.dtype == np.int64
        assert anchors.tolist() == [[10, 20], [30, 40]]

    def test_fractional_anchor_raises(self, tmp_path):
        path = tmp_path / "anchors.txt"
        path.write_text("10.5 20\n")
        with pytest.raises(IllegalInputError, match="integers"):
            read_anchors(path)


class TestParser:
    """Tests for argument parsing."""

    def test_register_options(self):
        parser = create_parser()
        args = parser.parse_args([
            "register", "a.fits", "b.fits",
            "--offsets", "off.txt", "--out", "out.fits",
            "--search", "5", "6", "--measure", "7", "8",
            "--rej-min", "1", "--rej-max", "2",
            "--geometry", "union", "--no-prefilter",
        ])
        config = config_from_args(args)

        assert (config.s_hx, config.s_hy, config.m_hx, config.m_hy) == (5, 6, 7, 8)
        assert (config.rmin, config.rmax) == (1, 2)
        assert config.geometry is GeometryMode.UNION
        assert config.refine is True
        assert config.prefilter is False

    def test_combine_does_not_refine(self):
        args = create_parser().parse_args(["combine", "a.fits", "--offsets", "o.txt", "--out", "c.fits"])
        assert config_from_args(args).refine is False

    @pytest.mark.parametrize("verbose,quiet,level", [
        (False, False, logging.INFO),
        (True, False, logging.DEBUG),
        (False, True, logging.WARNING),
    ])
    def test_logging_level(self, verbose, quiet, level):
        root = logging.getLogger()
        previous = root.level
        try:
            setup_logging(verbose=verbose, quiet=quiet)
            assert root.level == level
        finally:
            root.setLevel(previous)

    def test_missing_output_exits(self):
        with pytest.raises(SystemExit):
            create_parser().parse_args(["combine", "a.fits", "--offsets", "o.txt"])


class TestMain:
    """End-to-end CLI runs."""

    def test_no_command_returns_1(self):
        assert main([]) == 1

    def test_combine(self, fits_stack, tmp_path):
        paths = fits_stack([(0, 0), (2, 1), (-1, 3)])
        offsets = tmp_path / "offsets.txt"
        write_offsets(offsets, np.array([[0, 0], [2, 1], [-1, 3]]))
        out = tmp_path / "combined.fits"

        code = main(["combine", *map(str, paths), "--offsets", str(offsets), "--out", str(out), "-q"])

        assert code == 0
        with fits.open(out) as hdul:
            assert hdul[0].data.shape == (61, 61)
            assert hdul["CONTRIB"].data.max() == 3

    def test_register_saves_offsets(self, fits_stack, tmp_path):
        paths = fits_stack([(0, 0), (2, 1), (-1, 3)])
        priors = tmp_path / "priors.txt"
        write_offsets(priors, np.array([[0, 0], [2.3, 1.2], [-0.7, 3.4]]))
        out = tmp_path / "registered.fits"
        saved = tmp_path / "refined.json"

        code = main([
            "register", *map(str, paths),
            "--offsets", str(priors), "--out", str(out),
            "--save-offsets", str(saved), "-q",
        ])

        assert code == 0
        assert out.exists()
        refined = read_offsets(saved)
        assert np.allclose(refined, [[0, 0], [2, 1], [-1, 3]], atol=1e-4)

    def test_missing_frame_returns_1(self, tmp_path):
        offsets = tmp_path / "offsets.txt"
        write_offsets(offsets, np.zeros((1, 2)))
        code = main([
            "combine", str(tmp_path / "nope.fits"),
            "--offsets", str(offsets), "--out", str(tmp_path / "c.fits"), "-q",
        ])
        assert code == 1

    def test_existing_output_returns_1(self, fits_stack, tmp_path):
        paths = fits_stack([(0, 0)])
        offsets = tmp_path / "offsets.txt"
        write_offsets(offsets, np.zeros((1, 2)))
        out = tmp_path / "c.fits"
        args = ["combine", str(paths[0]), "--offsets", str(offsets), "--out", str(out), "-q"]

        assert main(args) == 0
        assert main(args) == 1
        assert main(args + ["--overwrite"]) == 0


class TestTerminalOutput:
    """Tests for the terminal helpers."""

    @pytest.mark.parametrize("seconds,expected", [
        (4.25, "4.2s"),
        (187, "3m 07s"),
        (3725, "1h 02m 05s"),
    ])
    def test_format_duration(self, seconds, expected):
        assert format_duration(seconds) == expected

    def test_quiet_stages_print_nothing(self, capsys):
        progress = StageProgress(total_stages=2, quiet=True)
        progress.start("Loading frames")
        progress.detail("3 frames")
        progress.done()
        progress.start("Shift-and-add")
        assert progress.stage == 2
        assert capsys.readouterr().out == ""

    def test_stage_numbering(self, capsys):
        progress = StageProgress(total_stages=2)
        progress.start("Loading frames", "*")
        progress.done("Loaded")
        out = capsys.readouterr().out
        assert "Stage 1/2: Loading frames" in out
        assert "Loaded" in out

    def test_summary_box_lines(self, capsys):
        print_summary_box(["Frames combined: 3/3"], title="shiftadd")
        out = capsys.readouterr().out
        assert "Frames combined: 3/3" in out
        assert "shiftadd" in out
