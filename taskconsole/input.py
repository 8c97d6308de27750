"""Keyboard input events and the predicates the console reacts to."""

from __future__ import annotations

import enum
from dataclasses import dataclass

__all__ = ["KeyModifiers", "KeyEvent", "should_quit", "is_space"]


class KeyModifiers(enum.Flag):
    """Modifier keys held while a key was pressed."""

    NONE = 0
    SHIFT = enum.auto()
    CONTROL = enum.auto()
    ALT = enum.auto()


@dataclass(frozen=True)
class KeyEvent:
    """A key press.

    ``code`` is the character typed, or the name of a special key such as
    ``"Enter"`` or ``"Esc"``.
    """

    code: str
    modifiers: KeyModifiers = KeyModifiers.NONE


def should_quit(event: object) -> bool:
    """Return True for ``q``, Ctrl-C or Ctrl-D."""
    if not isinstance(event, KeyEvent):
        return False
    if event.code == "q":
        return True
    return event.code in ("c", "d") and KeyModifiers.CONTROL in event.modifiers


def is_space(event: object) -> bool:
    """Return True if the event is a press of the space bar."""
    return isinstance(event, KeyEvent) and event.code == " "