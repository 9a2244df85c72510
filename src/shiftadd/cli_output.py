"""
Colored terminal output for the shiftadd command line.

Stage headers, status lines, the refinement progress bar and the final
summary box.

Author: Olivier Vitrac, PhD, HDR
        Generative Simulation Initiative
        olivier.vitrac@gmail.com
"""

from __future__ import annotations

import os
import sys
import time

from colorama import Fore, Style, init as colorama_init
from tqdm import tqdm

from .utils import format_duration

colorama_init(autoreset=True)

BAR_FORMAT = "{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}<{remaining}] {postfix}"
BAR_WIDTH = 80


class Colors:
    """Color constants for consistent styling."""

    BANNER = Fore.CYAN + Style.BRIGHT
    STAGE = Fore.BLUE + Style.BRIGHT
    DETAIL = Fore.WHITE
    SUCCESS = Fore.GREEN + Style.BRIGHT
    WARNING = Fore.YELLOW
    ERROR = Fore.RED + Style.BRIGHT
    METRIC = Fore.MAGENTA
    VALUE = Fore.YELLOW + Style.BRIGHT
    PATH = Fore.CYAN
    RESET = Style.RESET_ALL


class Symbols:
    """Status symbols, switched to ASCII on terminals without unicode."""

    CHECK = "✔"
    CROSS = "✘"
    WARN = "⚠"
    FILE = "\U0001F4C4"  # 📄
    TARGET = "\U0001F3AF"  # 🎯
    LAYERS = "\U0001F5C2"  # 🗂

    @classmethod
    def use_ascii(cls) -> None:
        cls.CHECK = "[OK]"
        cls.CROSS = "[X]"
        cls.WARN = "!"
        cls.FILE = "[F]"
        cls.TARGET = "[+]"
        cls.LAYERS = "[=]"


def _box(lines: list[str], title: str, color: str) -> None:
    inner = max([len(title)] + [len(line) for line in lines]) + 4
    print(f"{color}╔{'═' * inner}╗")
    print(f"║{title:^{inner}}║")
    if lines:
        print(f"╟{'─' * inner}╢")
        for line in lines:
            print(f"║  {line:<{inner - 2}}║")
    print(f"╚{'═' * inner}╝{Colors.RESET}")


def print_banner(version: str) -> None:
    """Print the startup banner."""
    print()
    _box([f"version {version}"], "shiftadd: registration and shift-and-add stacking", Colors.BANNER)


def print_summary_box(lines: list[str], title: str = "Summary") -> None:
    """Print the closing summary of a run."""
    print()
    _box(lines, title, Colors.SUCCESS)


def print_warning(text: str) -> None:
    print(f"{Colors.WARNING}{Symbols.WARN} {text}{Colors.RESET}")


def print_error(text: str) -> None:
    """Print an error message on stderr."""
    print(f"{Colors.ERROR}{Symbols.CROSS} {text}{Colors.RESET}", file=sys.stderr)


def print_metric(name: str, value: str | int | float, unit: str = "") -> None:
    suffix = f" {unit}" if unit else ""
    print(f"  {Colors.METRIC}{name}: {Colors.VALUE}{value}{Colors.RESET}{suffix}")


def print_path(label: str, path: str) -> None:
    print(f"  {Colors.DETAIL}{label}: {Colors.PATH}{path}{Colors.RESET}")


def create_progress_bar(
    total: int,
    desc: str,
    unit: str = "frame",
    disable: bool = False,
) -> tqdm:
    """
    Create the progress bar shown while frames are processed.

    Parameters
    ----------
    total : int
        Number of frames to process.
    desc : str
        Label shown left of the bar.
    unit : str, default "frame"
        Unit name for items.
    disable : bool, default False
        Create a silent bar (for --quiet runs and library calls).

    Returns
    -------
    tqdm
        Progress bar, to be used as a context manager.
    """
    return tqdm(
        total=total,
        desc=f"{Colors.SUCCESS}{desc}{Colors.RESET}",
        unit=unit,
        bar_format=BAR_FORMAT,
        ncols=BAR_WIDTH,
        colour="green",
        leave=True,
        disable=disable,
    )


class StageProgress:
    """
    Numbered stage display for a command run.

    Example
    -------
    >>> progress = StageProgress(total_stages=3)
    >>> progress.start("Loading frames", Symbols.FILE)
    >>> progress.detail("12 frames of 1024x1024")
    >>> progress.done()
    """

    def __init__(self, total_stages: int, quiet: bool = False):
        self.total_stages = total_stages
        self.quiet = quiet
        self.stage = 0
        self._t0 = None

    def start(self, name: str, symbol: str = "") -> None:
        """Open the next stage."""
        self.stage += 1
        self._t0 = time.time()
        if self.quiet:
            return
        marker = symbol or "▶"
        print(f"\n{Colors.STAGE}{marker}  Stage {self.stage}/{self.total_stages}: {name}{Colors.RESET}")

    def detail(self, text: str) -> None:
        if not self.quiet:
            print(f"   {Colors.DETAIL}{text}{Colors.RESET}")

    def warn(self, text: str) -> None:
        if not self.quiet:
            print(f"   {Colors.WARNING}{Symbols.WARN} {text}{Colors.RESET}")

    def done(self, message: str = "Complete") -> None:
        """Close the current stage with its elapsed time."""
        if self.quiet:
            return
        elapsed = format_duration(time.time() - self._t0) if self._t0 else ""
        timing = f" ({elapsed})" if elapsed else ""
        print(f"   {Colors.SUCCESS}{Symbols.CHECK} {message}{timing}{Colors.RESET}")


def setup_terminal() -> bool:
    """
    Fall back to ASCII symbols when stdout cannot render unicode.

    Returns
    -------
    bool
        True when unicode symbols are kept.
    """
    encoding = (getattr(sys.stdout, "encoding", None) or "").lower()
    unicode_ok = "utf" in encoding and os.environ.get("TERM") != "dumb"
    if not unicode_ok:
        Symbols.use_ascii()
    return unicode_ok
