"""Mnemonic and signature maps used to name instructions and variables."""

from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass, field
from typing import IO, Iterable

logger = logging.getLogger(__name__)

MAGIC = "!eclmap"

_KEYWORDS = frozenset(
    {
        "anim", "ecli", "sub", "timeline",
        "var", "int", "float", "void",
        "inline", "return", "goto", "unless",
        "if", "else", "do", "while",
        "times", "switch", "case", "default",
        "break", "async", "global", "sin",
        "cos", "sqrt", "rad", "false", "true",
    }
)

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")

# Section name -> kind of value validation applied to its entries.
_SECTIONS = {
    "ins_names": "ident",
    "ins_signatures": "signature",
    "gvar_names": "ident",
    "gvar_types": "type",
    "timeline_ins_names": "ident",
    "timeline_ins_signatures": "signature",
}


class EclMapError(ValueError):
    """Raised when a map file line cannot be parsed at all."""


def _check_ident(value: str) -> str | None:
    if not _IDENT.match(value):
        return f"'{value}' isn't valid identifier"
    if value.startswith("ins_"):
        return "mnemonic can't start with 'ins_'"
    if value in _KEYWORDS:
        return f"'{value}' is a keyword, ignoring"
    return None


def _check_type(value: str) -> str | None:
    if value not in ("$", "%"):
        return f"unknown type '{value}'"
    return None


_CHECKS = {
    "ident": _check_ident,
    "type": _check_type,
    "signature": lambda value: None,
}


@dataclass
class EclMap:
    """Maps from instruction and variable numbers to names and signatures."""

    ins_names: dict[int, str] = field(default_factory=dict)
    ins_signatures: dict[int, str] = field(default_factory=dict)
    gvar_names: dict[int, str] = field(default_factory=dict)
    gvar_types: dict[int, str] = field(default_factory=dict)
    timeline_ins_names: dict[int, str] = field(default_factory=dict)
    timeline_ins_signatures: dict[int, str] = field(default_factory=dict)
    diagnostics: list[str] = field(default_factory=list)
    _mnemonics: list[str] = field(default_factory=list, repr=False)

    def load(self, stream: IO | Iterable, filename: str = "(unknown)") -> None:
        """Read entries from a map file; each load starts in the ins_names section.

        Invalid entries are reported in ``diagnostics`` and skipped.
        """
        section = "ins_names"
        for linenum, raw in enumerate(stream, 1):
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            line = raw.split("#", 1)[0].strip()
            if not line:
                continue
            if line.startswith("!"):
                if line == MAGIC:
                    continue
                name = line[1:]
                if name in _SECTIONS:
                    section = name
                else:
                    self._report(filename, linenum, f"unknown control line '{line}'")
                continue

            parts = line.split(None, 1)
            key_text = parts[0]
            value = parts[1].strip() if len(parts) > 1 else ""
            try:
                key = int(key_text, 10)
            except ValueError:
                raise EclMapError(
                    f"{filename}:{linenum}: '{key_text}' isn't a valid number"
                ) from None

            problem = _CHECKS[_SECTIONS[section]](value)
            if problem:
                self._report(filename, linenum, problem)
                continue
            getattr(self, section)[key] = value

    def rebuild(self) -> None:
        """Rebuild the mnemonic set after adding entries to the name maps."""
        self._mnemonics = sorted(
            [*self.ins_names.values(), *self.timeline_ins_names.values()]
        )

    def is_mnemonic(self, mnem: str) -> bool:
        """Return whether ``mnem`` is a known instruction mnemonic."""
        i = bisect.bisect_left(self._mnemonics, mnem)
        return i < len(self._mnemonics) and self._mnemonics[i] == mnem

    def _report(self, filename: str, linenum: int, message: str) -> None:
        text = f"{filename}:{linenum}: {message}"
        self.diagnostics.append(text)
        logger.warning(text)