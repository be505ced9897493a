"""Writing th10-family ECL files from the in-memory model."""

from __future__ import annotations

import logging
import struct
from typing import IO, Iterable

from .model import (
    SUB_PARAM_SIZE,
    SUB_PARAM_STRUCT,
    TH10_INS_CALL,
    TH10_INS_CALL_ASYNC,
    TH10_INS_CALL_ASYNC_ID,
    Ecl,
    EclError,
    Instr,
    InstrType,
    Options,
    Param,
    Sub,
    encode_value,
    is_post_th13,
    value_size,
    xor_bytes,
)
from .th10_formats import find_format

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<4sHHIII16s")
_LIST = struct.Struct("<4sI")
_SUB = struct.Struct("<4sI8s")
_INSTR = struct.Struct("<IHHHBBI")
_U32 = struct.Struct("<I")
_I32 = struct.Struct("<i")
_F32 = struct.Struct("<f")

_CALLS = (TH10_INS_CALL, TH10_INS_CALL_ASYNC, TH10_INS_CALL_ASYNC_ID)


def _report(options: Options, message: str) -> None:
    options.diagnostics.append(message)
    logger.warning(message)


def _encode_text(value, options: Options) -> bytes:
    """Encode a text parameter, stopping at the first NUL."""
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    elif options.encode_cp932:
        try:
            raw = value.encode("cp932")
        except UnicodeEncodeError as exc:
            raise EclError(f"cannot encode {value!r} as Shift-JIS") from exc
    else:
        raw = value.encode("utf-8", "surrogateescape")
    return raw.split(b"\0", 1)[0]


def _padded(length: int) -> int:
    return length + (4 - length % 4)


def _sub_param_fields(param: Param) -> tuple[str, str, bytes]:
    """Return the from type, to type and raw value of a 'D' argument."""
    if not isinstance(param.value, (bytes, bytearray)) or len(param.value) < SUB_PARAM_SIZE:
        raise EclError("sub call argument is not a valid 'D' parameter")
    frm, to, _, data = SUB_PARAM_STRUCT.unpack(bytes(param.value[:SUB_PARAM_SIZE]))
    return frm.decode("latin-1"), to.decode("latin-1"), data


def instr_size(
    version: int,
    instr: Instr,
    is_timeline: bool = False,
    options: Options | None = None,
) -> int:
    """Return the encoded size of ``instr`` in bytes (0 for timeline entries)."""
    if is_timeline:
        return 0
    if options is None:
        options = Options()
    size = _INSTR.size
    for param in instr.params:
        if param.type in ("m", "x"):
            size += _U32.size + _padded(len(_encode_text(param.value, options)))
        elif param.type in ("o", "t"):
            size += _U32.size
        else:
            size += value_size(param.value, param.value_type)
    return size


def _check_arguments(version: int, sub: Sub, instr: Instr, options: Options) -> None:
    name = options.eclmap.ins_names.get(instr.id)
    label = f"{instr.id} ({name})" if name else str(instr.id)
    expected = find_format(version, instr.id, False, options.eclmap)
    if expected is None:
        _report(
            options,
            f"in sub {sub.name}: instruction with id {label} "
            f"is not known to exist in version {version}",
        )
        return
    rest = expected
    for _ in instr.params:
        if not rest:
            _report(options, f"in sub {sub.name}: too many arguments for opcode {label}")
            break
        if rest[0] != "*":
            rest = rest[1:]
    if rest and rest[0] != "*":
        _report(options, f"in sub {sub.name}: too few arguments for opcode {label}")


def _check_call(
    sub: Sub, instr: Instr, subs: Iterable[Sub], no_warn: bool, options: Options
) -> None:
    if not instr.params:
        raise EclError(f"in sub {sub.name}: sub call without a sub name")
    sub_name = instr.params[0].value
    fmt = next((s.format for s in subs if not s.is_inline and s.name == sub_name), None)
    if fmt is None:
        if not no_warn:
            _report(
                options,
                f'in sub {sub.name}: unknown sub call "{sub_name}" '
                '(use the #nowarn "true" directive to disable this warning)',
            )
        return

    args = instr.params[1:]
    if instr.id == TH10_INS_CALL_ASYNC_ID:
        args = args[1:]
    v = 0
    for param in args:
        if v >= len(fmt):
            _report(
                options,
                f'in sub {sub.name}: too many parameters when calling sub "{sub_name}"',
            )
            break
        _, to, _ = _sub_param_fields(param)
        if fmt[v] != "?" and ((to == "i" and fmt[v] == "f") or (to == "f" and fmt[v] == "S")):
            _report(
                options,
                f"in sub {sub.name}: wrong type for parameter {v + 1} when calling "
                f'sub "{sub_name}", expected type: {fmt[v]}',
            )
        v += 1
    if v < len(fmt):
        _report(
            options,
            f"in sub {sub.name}: not enough parameters when calling sub {sub_name}",
        )


def _is_stack_ref(param: Param, refs: int) -> bool:
    target = -(refs + 1)
    if param.type == "f":
        return param.value == float(target)
    if param.type == "S":
        return param.value == target
    if param.type == "D":
        frm, _, data = _sub_param_fields(param)
        if frm == "f":
            return _F32.unpack(data)[0] == float(target)
        if frm == "i":
            return _I32.unpack(data)[0] == target
    return False


def serialize_instr(
    version: int,
    sub: Sub,
    instr: Instr,
    subs: Iterable[Sub],
    no_warn: bool = False,
    options: Options | None = None,
) -> bytes:
    """Encode one instruction of ``sub``; argument problems go to diagnostics."""
    if options is None:
        options = Options()
    subs = list(subs)

    _check_arguments(version, sub, instr, options)
    if not options.simplecreate and instr.id in _CALLS:
        _check_call(sub, instr, subs, no_warn, options)

    payload = bytearray()
    mask = 0
    refs = 0
    post13 = is_post_th13(version)
    for index, param in enumerate(instr.params):
        if param.stack:
            mask |= 1 << index
        if param.type == "o":
            relative = sub.label_offset(param.value) - instr.offset
            payload += _U32.pack(relative & 0xFFFFFFFF)
        elif param.type == "t":
            if param.value_type == "z":
                time = sub.label_time(param.value)
            else:
                time = int(param.value)
            payload += _I32.pack(time)
        elif param.type in ("m", "x"):
            raw = _encode_text(param.value, options)
            padded = _padded(len(raw))
            data = raw.ljust(padded, b"\0")
            if param.type == "x":
                data = xor_bytes(data, 0x77, 7, 16)
            payload += _U32.pack(padded) + data
        else:
            payload += encode_value(param.value, param.value_type)

        if param.stack and post13 and _is_stack_ref(param, refs):
            refs += 1

    actual = _INSTR.size + len(payload)
    size = instr.size or actual
    if size != actual:
        raise EclError(
            f"in sub {sub.name}: instruction {instr.id} encodes to {actual} bytes, "
            f"expected {size}"
        )
    if size > 0xFFFF:
        raise EclError(f"in sub {sub.name}: instruction {instr.id} is too large")

    header = _INSTR.pack(
        instr.time & 0xFFFFFFFF,
        instr.id & 0xFFFF,
        size,
        mask & 0xFFFF,
        instr.rank & 0xFF,
        instr.param_count & 0xFF,
        (refs << 3) & 0xFFFFFFFF,
    )
    return header + bytes(payload)


def _pad4(buf: bytearray) -> None:
    buf += bytes(-len(buf) % 4)


def _name_bytes(name: str) -> bytes:
    return name.encode("utf-8", "surrogateescape") + b"\0"


def compile_ecl(ecl: Ecl, out: IO[bytes], options: Options | None = None) -> None:
    """Write ``ecl`` as a binary ECL file to ``out``.

    Forward declarations and inline subs are not written; every written sub
    gets its file offset stored in ``offset``.
    """
    if options is None:
        options = Options()
    subs = [s for s in ecl.subs if not s.forward_declaration and not s.is_inline]

    buf = bytearray(_HEADER.size)
    include_offset = len(buf)

    buf += _LIST.pack(b"ANIM", len(ecl.anim_names))
    for name in ecl.anim_names:
        buf += _name_bytes(name)
    _pad4(buf)

    buf += _LIST.pack(b"ECLI", len(ecl.ecli_names))
    for name in ecl.ecli_names:
        buf += _name_bytes(name)
    _pad4(buf)

    include_length = len(buf) - include_offset
    offsets_pos = len(buf)
    buf += bytes(_U32.size * len(subs))

    for sub in subs:
        buf += _name_bytes(sub.name)
    _pad4(buf)

    max_opcode = 1003 if ecl.version == 14 else 0xFFFF

    for sub in subs:
        sub.offset = len(buf)
        buf += _SUB.pack(b"ECLH", _SUB.size, bytes(8))
        for instr in sub.instrs:
            if instr.type is not InstrType.INSTR:
                continue
            if instr.id > max_opcode:
                _report(
                    options,
                    f"warning: opcode: id {instr.id} was higher than the maximum {max_opcode}",
                )
            buf += serialize_instr(ecl.version, sub, instr, ecl.subs, ecl.no_warn, options)

    _HEADER.pack_into(
        buf, 0, b"SCPT", 1, include_length & 0xFFFF, include_offset, 0, len(subs), bytes(16)
    )
    struct.pack_into(f"<{len(subs)}I", buf, offsets_pos, *(s.offset for s in subs))
    out.write(bytes(buf))


def create_header(ecl: Ecl, out: IO[str]) -> None:
    """Write declarations of the subs in ``ecl`` as script text."""
    for sub in ecl.subs:
        if sub.forward_declaration or sub.is_inline:
            continue
        params = []
        for i in range(max(sub.arity, 0)):
            if i >= len(sub.vars):
                raise EclError(f"sub {sub.name} has fewer variables than its arity")
            var = sub.vars[i]
            kind = {"S": "int ", "f": "float "}.get(var.type, "var ")
            params.append(kind + var.name)
        out.write(f"\nvoid {sub.name}({', '.join(params)});\n")