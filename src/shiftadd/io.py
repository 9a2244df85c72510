"""
I/O operations for frame stacks and combined products.

Handles:
- Frame discovery in a directory
- FITS reading of frames with an optional bad-pixel extension
- Writing of combined images with their contribution and bad-pixel maps
- Plain-text offset and anchor lists

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np
from astropy.io import fits

from .config import CombinedResult, Frame
from .errors import IllegalInputError
from .refine import load_offsets
from .utils import __version__, get_timestamp_iso

logger = logging.getLogger(__name__)

MASK_EXTNAME = "BPM"
CONTRIB_EXTNAME = "CONTRIB"


def list_frames(directory: str | Path, pattern: str = "*.fits") -> list[Path]:
    """
    Discover frame files in a directory, sorted by name.

    Parameters
    ----------
    directory : str or Path
        Folder containing the frames.
    pattern : str, default "*.fits"
        Glob pattern of frame files.

    Returns
    -------
    list[Path]
        Sorted list of frame paths.
    """
    folder = Path(directory)
    if not folder.is_dir():
        raise IllegalInputError(f"Frame path is not a directory: {folder}")

    frames = sorted(folder.glob(pattern))
    logger.info("Discovered %d frames in %s", len(frames), folder.name)
    return frames


def read_frame(path: str | Path, mask_extname: str = MASK_EXTNAME) -> Frame:
    """
    Read a frame from a FITS file.

    Parameters
    ----------
    path : str or Path
        Path to the FITS file. The image is read from the primary HDU.
    mask_extname : str, default "BPM"
        Name of the image extension holding the bad-pixel map (non-zero =
        bad). Ignored when the file has no such extension.

    Returns
    -------
    Frame
        Float64 data is kept as float64; any other type is read as float32.
    """
    with fits.open(path) as hdul:
        data = hdul[0].data
        if data is None:
            raise IllegalInputError(f"No image data in primary HDU of {path}")
        dtype = np.float64 if data.dtype.kind == "f" and data.dtype.itemsize == 8 else np.float32
        data = np.asarray(data, dtype=dtype)

        mask = None
        if mask_extname in hdul:
            mask = np.asarray(hdul[mask_extname].data) != 0
            logger.debug("%s: %d bad pixel(s)", Path(path).name, int(mask.sum()))

    return Frame(data, mask)


def read_frames(paths: list[str | Path], mask_extname: str = MASK_EXTNAME) -> list[Frame]:
    """Read a list of FITS frames."""
    return [read_frame(p, mask_extname) for p in paths]


def read_header(path: str | Path) -> fits.Header:
    """
    Read FITS header without loading data.

    Parameters
    ----------
    path : str or Path
        Path to the FITS file.

    Returns
    -------
    fits.Header
        FITS header object.
    """
    with fits.open(path) as hdul:
        return hdul[0].header.copy()


def write_frame(
    path: str | Path,
    frame: Frame,
    header: fits.Header | None = None,
    overwrite: bool = False,
) -> None:
    """Write a frame, with its mask as a BPM extension when present."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    hdus = [fits.PrimaryHDU(data=frame.data, header=header)]
    if frame.mask is not None:
        hdus.append(fits.ImageHDU(data=frame.mask.astype(np.uint8), name=MASK_EXTNAME))
    fits.HDUList(hdus).writeto(path, overwrite=overwrite)
    logger.debug("Wrote FITS: %s", path)


def write_combined(
    path: str | Path,
    result: CombinedResult,
    header: fits.Header | None = None,
    overwrite: bool = False,
) -> None:
    """
    Write a combined image with its contribution and bad-pixel maps.

    Parameters
    ----------
    path : str or Path
        Output path.
    result : CombinedResult
        Combination to write.
    header : fits.Header, optional
        Primary header to extend. Provenance keywords are added.
    overwrite : bool, default False
        Whether to overwrite existing file.

    Notes
    -----
    The file holds the combined image in the primary HDU, the int32
    contribution map in extension ``CONTRIB`` and the bad-pixel map
    (1 = no contribution) in extension ``BPM``.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    header = fits.Header() if header is None else header.copy()
    header["SAVERS"] = (__version__, "shiftadd version")
    header["SADATE"] = (get_timestamp_iso(), "Combination date (UTC)")
    header["SANFRAME"] = (len(result.frame_indices), "Number of frames combined")
    header["SAORIGX"] = (result.origin[0], "Reference origin x in output (0-based)")
    header["SAORIGY"] = (result.origin[1], "Reference origin y in output (0-based)")

    hdul = fits.HDUList([
        fits.PrimaryHDU(data=result.image, header=header),
        fits.ImageHDU(data=result.contribution.astype(np.int32), name=CONTRIB_EXTNAME),
        fits.ImageHDU(data=result.rejected.astype(np.uint8), name=MASK_EXTNAME),
    ])
    hdul.writeto(path, overwrite=overwrite)
    logger.info("Wrote FITS: %s", path)


def _read_pairs(path: str | Path) -> np.ndarray:
    rows = []
    with open(path) as f:
        for lineno, line in enumerate(f, start=1):
            text = line.split("#", 1)[0].strip()
            if not text:
                continue
            fields = text.replace(",", " ").split()
            if len(fields) != 2:
                raise IllegalInputError(
                    f"{path}:{lineno}: expected two values, got {len(fields)}"
                )
            try:
                rows.append([float(fields[0]), float(fields[1])])
            except ValueError:
                raise IllegalInputError(f"{path}:{lineno}: not a number pair: {text!r}") from None
    return np.array(rows, dtype=np.float64).reshape(-1, 2)


def read_offsets(path: str | Path) -> np.ndarray:
    """
    Read offsets (dx, dy) from a text or JSON file.

    Text files hold one ``dx dy`` pair per line (``#`` starts a comment).
    JSON files are those written by :func:`shiftadd.refine.save_offsets`.

    Returns
    -------
    np.ndarray
        Offsets of shape (n, 2).
    """
    path = Path(path)
    if path.suffix.lower() == ".json":
        estimates, _ = load_offsets(path)
        return np.array([[e.dx, e.dy] for e in estimates], dtype=np.float64).reshape(-1, 2)
    offsets = _read_pairs(path)
    logger.info("Read %d offsets from %s", len(offsets), path)
    return offsets


def read_anchors(path: str | Path) -> np.ndarray:
    """Read integer anchor positions, one ``x y`` pair per line."""
    pairs = _read_pairs(path)
    if not np.all(pairs == np.round(pairs)):
        raise IllegalInputError(f"{path}: anchor coordinates must be integers")
    return pairs.astype(np.int64)


def write_offsets(path: str | Path, offsets: np.ndarray) -> None:
    """Write offsets as a text file with one ``dx dy`` pair per line."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    np.savetxt(path, np.asarray(offsets, dtype=np.float64).reshape(-1, 2), fmt="%.6f", header="dx dy")
    logger.info("Wrote %d offsets to %s", len(offsets), path)
