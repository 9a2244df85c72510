"""
Partial selection of extreme values.

Moves the ``rmin`` smallest values of an array to its front and the
``rmax`` largest to its back with adjacent compare-and-swap passes. The
pass count is ``n*r - r*(r+1)/2`` with ``r = rmin + rmax``, cheaper than a
full sort when few values are rejected.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import numpy as np

from .errors import IllegalInputError, NullInputError


def _exchange(a: np.ndarray, i: int, active: np.ndarray | None) -> None:
    """Order the pair of rows (i-1, i) so the smaller value comes first."""
    lo = a[i - 1]
    hi = a[i]
    new_lo = np.minimum(lo, hi)
    new_hi = np.maximum(lo, hi)
    if active is not None:
        new_lo = np.where(active, new_lo, lo)
        new_hi = np.where(active, new_hi, hi)
    a[i - 1] = new_lo
    a[i] = new_hi


def select_extremes(
    a: np.ndarray,
    rmin: int,
    rmax: int,
    counts: np.ndarray | None = None,
) -> None:
    """
    Place the extreme values of ``a`` at both ends, in place, along axis 0.

    Parameters
    ----------
    a : np.ndarray
        1-D array, or 2-D buffer of shape (n, m) holding one sample list
        per column.
    rmin : int
        Number of smallest values to gather at the start.
    rmax : int
        Number of largest values to gather at the end.
    counts : np.ndarray, optional
        For a 2-D buffer, number of valid entries per column. Column ``c``
        is then the array ``a[:counts[c], c]``; entries past the count are
        left untouched. Defaults to the full height.

    Notes
    -----
    After the call, for each column of length ``n > rmin + rmax``, the
    first ``rmin`` values are each <= every value in ``[rmin, n - rmax)``
    and the last ``rmax`` values are each >= every value in that range.
    The middle is left in unspecified order. Columns no longer than
    ``rmin + rmax`` are only partially ordered.

    All columns are processed in lock-step: each pass applies the same
    adjacent exchange to every column for which it is in range, so each
    column receives exactly the scalar sequence of exchanges.
    """
    if a is None:
        raise NullInputError("Array to select from is None")
    if rmin < 0 or rmax < 0:
        raise IllegalInputError(
            f"Selection counts must be non-negative, got rmin={rmin}, rmax={rmax}"
        )
    if a.ndim not in (1, 2):
        raise IllegalInputError(f"Expected a 1-D or 2-D array, got {a.ndim}-D")

    buf = a[:, None] if a.ndim == 1 else a
    n = buf.shape[0]
    if rmin + rmax > n:
        raise IllegalInputError(
            f"Cannot reject {rmin}+{rmax} values from {n} samples"
        )
    if rmin + rmax == 0 or n < 2:
        return

    if counts is None:
        c = None
    else:
        c = np.asarray(counts)
        if c.shape != (buf.shape[1],):
            raise IllegalInputError(
                f"counts must have shape ({buf.shape[1]},), got {c.shape}"
            )
        if np.any(c < 0) or np.any(c > n):
            raise IllegalInputError(f"counts must lie in [0, {n}]")

    jeq = min(rmin, rmax)
    j = 0
    while j < jeq:
        # Bubble one minimum value into place
        for i in range(n - j - 1, j, -1):
            _exchange(buf, i, None if c is None else i <= c - j - 1)
        # Bubble one maximum value into place
        for i in range(j + 2, n - j):
            _exchange(buf, i, None if c is None else i < c - j)
        j += 1

    # At most one of the two loops below runs
    while j < rmin:
        for i in range(n - rmax - 1, j, -1):
            _exchange(buf, i, None if c is None else i <= c - rmax - 1)
        j += 1

    while j < rmax:
        for i in range(rmin + 1, n - j):
            _exchange(buf, i, None if c is None else i < c - j)
        j += 1
