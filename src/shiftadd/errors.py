"""
Exception hierarchy for the shiftadd registration and stacking engine.

Every failure raised by the package derives from :class:`ShiftAddError` and
from the closest built-in exception, so callers may catch either.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations


class ShiftAddError(Exception):
    """Base exception for all shiftadd failures."""


class NullInputError(ShiftAddError, ValueError):
    """A required argument is missing (None or empty)."""


class IllegalInputError(ShiftAddError, ValueError):
    """An argument has an illegal value (negative extent or count, bad mode)."""


class IncompatibleInputError(ShiftAddError, ValueError):
    """Arguments are individually valid but do not agree with each other.

    Raised for frame/offset count mismatches and for stacks whose frames
    differ in shape or sample type.
    """


class InvalidTypeError(ShiftAddError, TypeError):
    """Unsupported sample type (only float32 and float64 frames combine)."""


class DataNotFoundError(ShiftAddError, LookupError):
    """No usable data: no anchor validated, or no frame survived filtering."""


class IllegalOutputError(ShiftAddError, ValueError):
    """The requested output cannot be built (empty intersection canvas)."""
