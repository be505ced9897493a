"""In-memory model of an ECL script, plus the value codecs the formats share."""

from __future__ import annotations

import dataclasses
import math
import struct
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable

from .eclmap import EclMap

RANK_EASY = 1 << 0
RANK_NORMAL = 1 << 1
RANK_HARD = 1 << 2
RANK_LUNATIC = 1 << 3
RANK_EXTRA = 1 << 4
RANK_OVERDRIVE = 1 << 5

# Unused ranks in some games, and every rank in numeric-difficulty games.
RANK_ID = tuple(1 << n for n in range(8))

TH10_INS_RET_BIG = 1
TH10_INS_RET_NORMAL = 10
TH10_INS_CALL = 11
TH10_INS_CALL_ASYNC = 15
TH10_INS_CALL_ASYNC_ID = 16
TH10_INS_STACK_ALLOC = 40
TH10_INS_SETI = 43
TH10_INS_SETF = 45

# Variables used as return registers.
TH10_VAR_I3 = -9982
TH10_VAR_F3 = -9978.0

# A 'D' sub-call parameter: from type, to type, zero padding, 4-byte value.
SUB_PARAM_STRUCT = struct.Struct("<ccH4s")
SUB_PARAM_SIZE = SUB_PARAM_STRUCT.size

_PRE_TH10 = frozenset({6, 7, 8, 9, 95})
_PRE_TH13 = _PRE_TH10 | {10, 103, 11, 12, 125, 128}

_FIXED = {
    "S": ("<i", "<I", 0xFFFFFFFF),
    "U": ("<I", "<I", 0xFFFFFFFF),
    "s": ("<h", "<H", 0xFFFF),
    "u": ("<H", "<H", 0xFFFF),
    "c": ("<b", "<B", 0xFF),
    "C": ("<B", "<B", 0xFF),
}


class EclError(ValueError):
    """Raised for malformed ECL data or unresolved references."""


class InstrType(Enum):
    """Kind of entry in an instruction list."""

    INSTR = "instr"
    TIME = "time"
    RANK = "rank"
    LABEL = "label"


@dataclass
class Options:
    """Settings that affect reading, dumping and writing."""

    rawoutput: bool = False
    simplecreate: bool = False
    hexdebug: bool = False
    encode_cp932: bool = False
    eclmap: EclMap = field(default_factory=EclMap)
    diagnostics: list[str] = field(default_factory=list)
    was_error: bool = False


@dataclass
class Param:
    """One instruction parameter.

    ``type`` is the format character; ``value_type`` is how ``value`` is
    actually stored and defaults to ``type``.
    """

    type: str
    value: Any = None
    value_type: str | None = None
    stack: bool = False
    is_expression_param: bool = False

    def __post_init__(self) -> None:
        if self.value_type is None:
            self.value_type = self.type

    def copy(self) -> "Param":
        """Return an independent copy of this parameter."""
        value = self.value
        if isinstance(value, bytearray):
            value = bytearray(value)
        return dataclasses.replace(self, value=value)


@dataclass
class Instr:
    """An instruction, or a time, rank or label marker."""

    type: InstrType = InstrType.INSTR
    string: str | None = None
    id: int = 0
    param_count: int = 0
    params: list[Param] = field(default_factory=list)
    op_type: str | None = None
    size: int = 0
    time: int = 0
    rank: int = 0
    offset: int = 0
    flags: int = 0
    address: int = 0


def make_time(time: int) -> Instr:
    """Return a time marker."""
    return Instr(type=InstrType.TIME, time=time)


def make_rank(rank: int) -> Instr:
    """Return a rank marker."""
    return Instr(type=InstrType.RANK, rank=rank)


def make_label(offset: int) -> Instr:
    """Return a label marker at ``offset``."""
    return Instr(type=InstrType.LABEL, offset=offset)


@dataclass
class Label:
    name: str
    offset: int = 0
    time: int = 0


@dataclass
class Variable:
    name: str
    type: str | None = None
    stack: int = 0
    scope: int = 0
    is_written: bool = False
    is_unused: bool = False


@dataclass
class Sub:
    """A subroutine: its signature, instructions and labels."""

    name: str
    ret_type: str | None = None
    forward_declaration: bool = False
    is_inline: bool = False
    arity: int = -1
    format: str | None = None
    stack: int = 0
    vars: list[Variable] = field(default_factory=list)
    instrs: list[Instr] = field(default_factory=list)
    labels: list[Label] = field(default_factory=list)
    time: int = 0
    offset: int = 0

    def _label(self, name: str) -> Label:
        for label in self.labels:
            if label.name == name:
                return label
        raise EclError(f"label not found: {name}")

    def label_offset(self, name: str) -> int:
        """Return the offset of the label called ``name``."""
        return self._label(name).offset

    def label_time(self, name: str) -> int:
        """Return the time of the label called ``name``."""
        return self._label(name).time


@dataclass
class Ecl:
    """A whole ECL file."""

    version: int = 0
    anim_names: list[str] = field(default_factory=list)
    ecli_names: list[str] = field(default_factory=list)
    sub_count: int = 0
    subs: list[Sub] = field(default_factory=list)
    timelines: list[Any] = field(default_factory=list)
    no_warn: bool = False


def is_post_th10(version: int) -> bool:
    """Whether ``version`` uses the stack-based (th10 and later) format."""
    return version not in _PRE_TH10


def is_post_th13(version: int) -> bool:
    """Whether ``version`` is th13 or later."""
    return version not in _PRE_TH13


def is_numeric_difficulty_version(version: int) -> bool:
    """Whether ranks in ``version`` are plain numbers rather than difficulties."""
    return version in (185, 19)


def get_default_none_rank(version: int) -> int:
    """Return the rank value written as ``!-``."""
    if not is_post_th13(version):
        return 0xF0
    if is_numeric_difficulty_version(version):
        return 0x00
    return 0xC0


def _f32(value: float) -> float:
    return struct.unpack("<f", struct.pack("<f", value))[0]


def decode_value(data: bytes, type: str) -> tuple[Any, int]:
    """Decode one value of ``type`` from ``data``; return it and the bytes used."""
    data = bytes(data)
    if type in _FIXED:
        fmt = _FIXED[type][0]
        size = struct.calcsize(fmt)
        if len(data) < size:
            raise EclError(f"not enough data for a value of type '{type}'")
        return struct.unpack_from(fmt, data)[0], size
    if type == "f":
        if len(data) < 4:
            raise EclError("not enough data for a value of type 'f'")
        return struct.unpack_from("<f", data)[0], 4
    if type == "m":
        return data, len(data)
    if type == "z":
        end = data.find(b"\0")
        if end < 0:
            return data.decode("utf-8", "surrogateescape"), len(data)
        return data[:end].decode("utf-8", "surrogateescape"), end + 1
    raise EclError(f"unknown value type '{type}'")


def encode_value(value: Any, type: str) -> bytes:
    """Encode ``value`` as ``type`` in little-endian wire form."""
    if type in _FIXED:
        _, fmt, mask = _FIXED[type]
        return struct.pack(fmt, int(value) & mask)
    if type == "f":
        return struct.pack("<f", float(value))
    if type == "m":
        return bytes(value)
    if type == "z":
        raw = value.encode("utf-8", "surrogateescape") if isinstance(value, str) else bytes(value)
        return raw + b"\0"
    raise EclError(f"unknown value type '{type}'")


def value_size(value: Any, type: str) -> int:
    """Return the number of bytes ``value`` takes when encoded as ``type``."""
    return len(encode_value(value, type))


def _quote(text: str) -> str:
    return '"' + text.replace("\\", "\\\\").replace('"', '\\"') + '"'


def value_to_text(value: Any, type: str) -> str:
    """Render a value as script text."""
    if type in _FIXED:
        return str(int(value))
    if type == "f":
        return format_float(value)
    if type == "z":
        if not isinstance(value, str):
            value = bytes(value).decode("utf-8", "surrogateescape")
        return _quote(value.split("\0", 1)[0])
    if type == "m":
        text, _ = decode_value(value, "z")
        return _quote(text)
    raise EclError(f"unknown value type '{type}'")


def format_float(value: float) -> str:
    """Shortest decimal text that reads back as the same 32-bit float."""
    v = _f32(value)
    if math.isnan(v):
        return "nan"
    if math.isinf(v):
        return "inf" if v > 0 else "-inf"
    text = repr(v)
    for precision in range(1, 18):
        candidate = f"{v:.{precision}g}"
        if _f32(float(candidate)) == v:
            text = candidate
            break
    text = format(Decimal(text), "f")
    if "." not in text:
        text += ".0"
    return text


def xor_bytes(data: bytes, key: int, step: int = 0, step2: int = 0) -> bytes:
    """XOR with a key that advances by ``step``, which itself advances by ``step2``."""
    out = bytearray(data)
    for i, byte in enumerate(out):
        out[i] = byte ^ key
        key = (key + step) & 0xFF
        step = (step + step2) & 0xFF
    return bytes(out)


def find_format(table: Iterable[tuple[int, str]], id: int) -> str | None:
    """Return the format of the first entry for ``id`` in ``table``, or None."""
    return next((fmt for entry_id, fmt in table if entry_id == id), None)