"""A small string interner that hands out shared string instances."""

from __future__ import annotations

import logging
import weakref

__all__ = ["InternedStr", "Strings"]

log = logging.getLogger(__name__)


class InternedStr(str):
    """A string owned by a :class:`Strings` interner.

    It behaves like an ordinary ``str``; equal strings handed out by the same
    interner are the same object.
    """

    def __repr__(self) -> str:
        return f"InternedStr({str.__repr__(self)})"


class Strings:
    """Deduplicates strings so that equal values share one object."""

    def __init__(self) -> None:
        self._strings: dict[str, InternedStr] = {}

    def __len__(self) -> int:
        return len(self._strings)

    def __contains__(self, value: object) -> bool:
        return value in self._strings

    def __iter__(self):
        return iter(list(self._strings.values()))

    def string(self, string: str) -> InternedStr:
        """Return the interned instance equal to ``string``, adding it if new."""
        existing = self._strings.get(string)
        if existing is not None:
            return existing
        interned = InternedStr(string)
        self._strings[str(interned)] = interned
        return interned

    def retain_referenced(self) -> int:
        """Drop interned strings that nothing else refers to.

        Returns the number of strings dropped.
        """
        before = len(self._strings)
        refs = [weakref.ref(value) for value in self._strings.values()]
        self._strings.clear()
        survivors = [ref() for ref in refs]
        self._strings = {str(s): s for s in survivors if s is not None}
        dropped = before - len(self._strings)
        if dropped:
            log.debug(
                "dropped un-referenced strings: strings.len=%d dropped=%d",
                len(self._strings),
                dropped,
            )
        return dropped