"""
Version metadata and small helpers shared by the CLI and the writers.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import platform
from datetime import datetime, timezone

__version__ = "0.1.0"
__version_info__ = {
    "major": 0,
    "minor": 1,
    "patch": 0,
    "status": "beta",
    "date": "2026-10-19",
}


def get_version() -> str:
    return __version__


def get_version_banner() -> str:
    """One-line identification written to the log at startup."""
    return f"shiftadd v{__version__} ({__version_info__['status']}, {__version_info__['date']})"


def get_platform_info() -> str:
    """Operating system and interpreter, e.g. 'Linux 6.1 / Python 3.11.4'."""
    return f"{platform.system()} {platform.release()} / Python {platform.python_version()}"


def get_timestamp_iso() -> str:
    """UTC time of the call, ISO 8601."""
    return datetime.now(timezone.utc).isoformat()


def format_duration(seconds: float) -> str:
    """
    Render an elapsed time for the terminal.

    Sub-minute durations keep one decimal ("4.2s"); longer ones are split
    into whole units ("3m 07s", "1h 02m 05s").
    """
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(round(seconds)), 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m {secs:02d}s"
