"""View options: colours, character set and retention of finished items."""

from __future__ import annotations

import enum
import logging
import re
import subprocess
from dataclasses import dataclass, field, replace
from fractions import Fraction

__all__ = [
    "Palette",
    "RetainFor",
    "parse_duration",
    "format_duration",
    "parse_true_color",
    "ColorToggles",
    "ViewOptions",
]

log = logging.getLogger(__name__)

_NS_PER_SEC = 1_000_000_000
_U64_MAX = (1 << 64) - 1


class Palette(enum.Enum):
    """The colour palette used to draw the console."""

    NO_COLORS = "off"
    ANSI8 = "8"
    ANSI16 = "16"
    ANSI256 = "256"
    ALL = "all"

    @classmethod
    def parse(cls, text: str) -> Palette:
        """Parse a palette name: ``8``, ``16``, ``256``, ``all`` or ``off``."""
        wanted = text.strip().lower()
        for palette in cls:
            if palette.value == wanted:
                return palette
        raise ValueError(f"invalid color palette: {text!r}")


_UNIT_NANOS = {
    **dict.fromkeys(("nanos", "nsec", "ns"), 1),
    **dict.fromkeys(("usec", "us"), 1_000),
    **dict.fromkeys(("millis", "msec", "ms"), 1_000_000),
    **dict.fromkeys(("seconds", "second", "sec", "s"), _NS_PER_SEC),
    **dict.fromkeys(("minutes", "minute", "min", "m"), 60 * _NS_PER_SEC),
    **dict.fromkeys(("hours", "hour", "hr", "h"), 3_600 * _NS_PER_SEC),
    **dict.fromkeys(("days", "day", "d"), 86_400 * _NS_PER_SEC),
    **dict.fromkeys(("weeks", "week", "w"), 604_800 * _NS_PER_SEC),
    **dict.fromkeys(("months", "month", "M"), 2_630_016 * _NS_PER_SEC),
    **dict.fromkeys(("years", "year", "y"), 31_557_600 * _NS_PER_SEC),
}

_PART = re.compile(r"([0-9]+)\s*([^\s0-9]*)\s*")


def parse_duration(text: str) -> float:
    """Parse a span such as ``5days 2min 2s`` into seconds."""
    stripped = text.strip()
    if not stripped:
        raise ValueError("value was empty")
    total = 0
    pos = 0
    while pos < len(stripped):
        match = _PART.match(stripped, pos)
        if match is None:
            raise ValueError(f"invalid character at {pos} in {text!r}")
        number, unit = match.groups()
        if not unit:
            raise ValueError(f"time unit needed, for example {number}sec or {number}ms")
        multiplier = _UNIT_NANOS.get(unit)
        if multiplier is None:
            raise ValueError(f"unknown time unit {unit!r} in {text!r}")
        total += int(number) * multiplier
        if total // _NS_PER_SEC > _U64_MAX:
            raise ValueError(f"number is too large: {text!r}")
        pos = match.end()
    return total / _NS_PER_SEC


def format_duration(seconds: float) -> str:
    """Format a duration the way the console prints it, e.g. ``6s`` or ``1.5ms``."""
    nanos = round(Fraction(seconds) * _NS_PER_SEC)
    if nanos < 0:
        raise ValueError(f"durations cannot be negative: {seconds}")
    for scale, width, suffix in (
        (_NS_PER_SEC, 9, "s"),
        (1_000_000, 6, "ms"),
        (1_000, 3, "µs"),
    ):
        if nanos >= scale:
            whole, rest = divmod(nanos, scale)
            fraction = f"{rest:0{width}d}".rstrip("0")
            return f"{whole}.{fraction}{suffix}" if fraction else f"{whole}{suffix}"
    return f"{nanos}ns"


@dataclass(frozen=True)
class RetainFor:
    """How long to keep showing completed tasks; ``None`` keeps them forever."""

    duration: float | None = 6.0

    @classmethod
    def parse(cls, text: str) -> RetainFor:
        """Parse a duration span, or ``none`` to disable removal."""
        if text.lower() == "none":
            return cls(None)
        return cls(parse_duration(text))

    def __str__(self) -> str:
        return "" if self.duration is None else format_duration(self.duration)


def parse_true_color(text: str) -> bool:
    """Return True if a ``COLORTERM`` value advertises 24-bit colour."""
    value = text.strip().lower()
    return value in ("truecolor", "24bit")


@dataclass(frozen=True)
class ColorToggles:
    """Per-element colour switches; each holds a ``--no-*-colors`` flag value."""

    durations: bool | None = None
    terminated: bool | None = None

    def color_durations(self) -> bool:
        """Whether duration units are colour-coded."""
        return True if self.durations is None else not self.durations

    def color_terminated(self) -> bool:
        """Whether terminated tasks are colour-coded (follows the durations switch)."""
        return True if self.durations is None else not self.durations


def _first(preferred, fallback):
    return fallback if preferred is None else preferred


@dataclass(frozen=True)
class ViewOptions:
    """Options that control how the console is drawn."""

    no_colors: bool = False
    lang: str | None = None
    ascii_only: bool | None = None
    truecolor: bool | None = None
    palette: Palette | None = None
    toggles: ColorToggles = field(default_factory=ColorToggles)

    @classmethod
    def defaults(cls) -> ViewOptions:
        """The built-in default view options."""
        return cls(
            no_colors=False,
            lang="en_us.UTF-8",
            ascii_only=False,
            truecolor=True,
            palette=Palette.ALL,
            toggles=ColorToggles(durations=True, terminated=True),
        )

    def is_utf8(self) -> bool:
        """Whether the terminal may be sent non-ASCII characters."""
        if self.ascii_only:
            return False
        return (self.lang or "").endswith("UTF-8")

    def determine_palette(self) -> Palette:
        """Pick a palette from the options, ``COLORTERM``, then ``tput colors``."""
        if self.no_colors:
            log.debug("colors explicitly disabled by `--no-colors`")
            return Palette.NO_COLORS
        if self.palette is not None:
            log.debug("colors selected via `--palette`: %s", self.palette)
            return self.palette
        if self.truecolor:
            log.debug("millions of colors enabled via `COLORTERM=truecolor`")
            return Palette.ALL

        try:
            output = subprocess.run(["tput", "colors"], capture_output=True, check=False)
        except OSError as error:
            log.debug("`tput colors` failed: %s", error)
            return Palette.NO_COLORS
        try:
            text = output.stdout.decode("utf-8")
        except UnicodeDecodeError as error:
            log.warning("`tput colors` stdout was not utf-8: %s", error)
            return Palette.NO_COLORS
        try:
            return Palette.parse(text)
        except ValueError:
            log.warning("invalid color palette from `tput colors`: %r", text)
            return Palette.NO_COLORS

    def merge_with(self, command_line: ViewOptions) -> ViewOptions:
        """Overlay ``command_line`` on these options; its set values win."""
        return replace(
            self,
            no_colors=command_line.no_colors or self.no_colors,
            lang=_first(command_line.lang, self.lang),
            ascii_only=_first(command_line.ascii_only, self.ascii_only),
            truecolor=_first(command_line.truecolor, self.truecolor),
            palette=_first(command_line.palette, self.palette),
            toggles=ColorToggles(
                durations=_first(command_line.toggles.durations, self.toggles.durations),
                terminated=_first(command_line.toggles.terminated, self.toggles.terminated),
            ),
        )