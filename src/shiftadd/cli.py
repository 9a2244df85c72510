"""
Command-line interface for shiftadd.

Usage:
    python -m shiftadd combine <frames...> --offsets offsets.txt --out combined.fits
    shiftadd register <frames...> --offsets offsets.txt --out combined.fits [options]

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import argparse
import logging
import time
from pathlib import Path

from .cli_output import (
    StageProgress,
    Symbols,
    print_banner,
    print_error,
    print_metric,
    print_path,
    print_summary_box,
    print_warning,
    setup_terminal,
)
from .combine import compute_combine_statistics
from .config import Frame, GeometryMode, OffsetEstimate, RegistrationConfig
from .errors import ShiftAddError
from .io import read_anchors, read_frames, read_offsets, write_combined
from .kernel import Kernel
from .pipeline import combine_registered, register_stack
from .refine import save_offsets
from .utils import format_duration, get_platform_info, get_version, get_version_banner

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure logging for CLI; --quiet keeps warnings and errors only."""
    level = logging.DEBUG if verbose else logging.INFO
    if quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-7s | %(message)s",
        datefmt="%H:%M:%S",
    )
    logging.getLogger().setLevel(level)


def _add_combine_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "frames",
        nargs="+",
        help="FITS frames to combine (the first one is the reference)",
    )
    parser.add_argument(
        "--offsets",
        type=str,
        required=True,
        help="Offsets file: one 'dx dy' line per frame, or a JSON offsets file",
    )
    parser.add_argument(
        "--out",
        type=str,
        required=True,
        help="Output FITS file",
    )
    parser.add_argument(
        "--geometry",
        choices=[m.value for m in GeometryMode],
        default=GeometryMode.INTERSECT.value,
        help="Output canvas: intersect, union or first (default: intersect)",
    )
    parser.add_argument(
        "--rej-min",
        type=int,
        default=0,
        help="Number of lowest samples rejected per pixel (default: 0)",
    )
    parser.add_argument(
        "--rej-max",
        type=int,
        default=0,
        help="Number of highest samples rejected per pixel (default: 0)",
    )
    parser.add_argument(
        "--kernel",
        choices=[k.value for k in Kernel],
        default=Kernel.TANH.value,
        help="Interpolation kernel (default: tanh)",
    )
    parser.add_argument(
        "--mask-ext",
        type=str,
        default="BPM",
        help="FITS extension holding the bad-pixel map of each frame (default: BPM)",
    )
    parser.add_argument(
        "--overwrite",
        action="store_true",
        help="Overwrite the output file if it exists",
    )
    parser.add_argument(
        "--quiet", "-q",
        action="store_true",
        help="Minimal output (no progress display)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )


def create_parser() -> argparse.ArgumentParser:
    """Create argument parser for CLI."""
    parser = argparse.ArgumentParser(
        prog="shiftadd",
        description="Sub-pixel registration and shift-and-add stacking of FITS frames",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"shiftadd {get_version()}",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Combine command
    combine_parser = subparsers.add_parser(
        "combine",
        help="Shift-and-add frames with known offsets",
    )
    _add_combine_options(combine_parser)

    # Register command
    register_parser = subparsers.add_parser(
        "register",
        help="Refine offsets by cross-correlation, then shift-and-add",
    )
    _add_combine_options(register_parser)
    register_parser.add_argument(
        "--anchors",
        type=str,
        default=None,
        help="Anchor file: one integer 'x y' line per anchor "
             "(default: largest aperture of the first frame)",
    )
    register_parser.add_argument(
        "--search",
        type=int,
        nargs=2,
        metavar=("HX", "HY"),
        default=[15, 15],
        help="Search half-width and half-height in pixels (default: 15 15)",
    )
    register_parser.add_argument(
        "--measure",
        type=int,
        nargs=2,
        metavar=("HX", "HY"),
        default=[15, 15],
        help="Measurement half-width and half-height in pixels (default: 15 15)",
    )
    register_parser.add_argument(
        "--no-prefilter",
        action="store_true",
        help="Do not median-filter frames before correlating",
    )
    register_parser.add_argument(
        "--boundary-tolerance",
        type=float,
        default=1.0,
        help="Reject shifts closer than this to the search edge (default: 1.0)",
    )
    register_parser.add_argument(
        "--sigmas",
        type=float,
        nargs="+",
        default=[5.0, 2.0, 1.0, 0.5],
        help="Detection thresholds for the anchor search (default: 5 2 1 0.5)",
    )
    register_parser.add_argument(
        "--save-offsets",
        type=str,
        default=None,
        help="Save the refined offsets to a JSON file",
    )

    return parser


def config_from_args(args: argparse.Namespace) -> RegistrationConfig:
    """Build a RegistrationConfig from parsed arguments."""
    config = RegistrationConfig(
        rmin=args.rej_min,
        rmax=args.rej_max,
        geometry=args.geometry,
        kernel=args.kernel,
        refine=args.command == "register",
    )
    if args.command == "register":
        config.s_hx, config.s_hy = args.search
        config.m_hx, config.m_hy = args.measure
        config.prefilter = not args.no_prefilter
        config.boundary_tolerance = args.boundary_tolerance
        config.sigmas = tuple(args.sigmas)
    config.validate()
    return config


def run(args: argparse.Namespace) -> int:
    """Execute a combine or register command."""
    t_start = time.time()
    config = config_from_args(args)
    progress = StageProgress(total_stages=3 if config.refine else 2, quiet=args.quiet)

    if not args.quiet:
        setup_terminal()
        print_banner(get_version())
    logger.info(get_version_banner())
    logger.debug("Platform: %s", get_platform_info())

    # Stage 1: load
    progress.start("Loading frames", Symbols.FILE)
    frames: list[Frame] = read_frames(args.frames, args.mask_ext)
    priors = read_offsets(args.offsets)
    progress.detail(f"{len(frames)} frames of {frames[0].width}x{frames[0].height}")
    progress.done()

    if config.refine:
        progress.start("Refining offsets", Symbols.TARGET)
        anchors = read_anchors(args.anchors) if args.anchors else None
        estimates, rejected = register_stack(
            frames,
            priors,
            anchors=anchors,
            search=config.search_spec(),
            sigmas=config.sigmas,
            prefilter=config.prefilter,
            boundary_tolerance=config.boundary_tolerance,
            show_progress=not args.quiet,
        )
        for record in rejected:
            progress.warn(f"Frame {record.index} ({Path(args.frames[record.index]).name}): {record.reason.value}")
        if args.save_offsets:
            save_offsets(
                estimates,
                args.save_offsets,
                metadata={"frames": [str(p) for p in args.frames]},
            )
            if not args.quiet:
                print_path("Offsets", args.save_offsets)
        progress.done(f"{len(estimates) - len(rejected)} of {len(estimates)} frames registered")
    else:
        estimates = [OffsetEstimate(float(dx), float(dy), 0.0) for dx, dy in priors]

    progress.start("Shift-and-add", Symbols.LAYERS)
    result = combine_registered(
        frames,
        estimates,
        config.rejection_policy(),
        config.geometry,
        config.kernel,
    )
    write_combined(args.out, result, overwrite=args.overwrite)
    progress.done()

    stats = compute_combine_statistics(result, n_frames=len(frames))
    if stats.rejected_fraction > 0.5:
        print_warning(f"{100 * stats.rejected_fraction:.0f}% of the output has no contribution")

    if not args.quiet:
        print_metric("Canvas", f"{result.shape[1]}x{result.shape[0]}")
        print_metric("Origin", f"({result.origin[0]:.2f}, {result.origin[1]:.2f})")
        print_summary_box(
            [
                f"Frames combined: {len(result.frame_indices)}/{stats.n_frames}",
                f"Contribution: {stats.min_contribution}..{stats.max_contribution} "
                f"(mean {stats.mean_contribution:.2f})",
                f"SNR proxy: {stats.snr_proxy:.1f}",
                f"Elapsed: {format_duration(time.time() - t_start)}",
                f"Output: {args.out}",
            ],
            title="shiftadd",
        )
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    setup_logging(args.verbose, args.quiet)

    try:
        return run(args)
    except (ShiftAddError, OSError) as e:
        print_error(f"{args.command.capitalize()} failed: {e}")
        logger.exception("%s failed: %s", args.command, e)
        return 1
