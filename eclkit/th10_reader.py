"""Reading th10-family ECL files into the in-memory model."""

from __future__ import annotations

import logging
import struct

from .model import (
    SUB_PARAM_SIZE,
    TH10_INS_CALL,
    TH10_INS_CALL_ASYNC,
    TH10_INS_CALL_ASYNC_ID,
    TH10_INS_STACK_ALLOC,
    Ecl,
    EclError,
    Instr,
    InstrType,
    Options,
    Param,
    Sub,
    decode_value,
    make_label,
    make_rank,
    make_time,
    xor_bytes,
)
from .th10_formats import find_format

logger = logging.getLogger(__name__)

_HEADER = struct.Struct("<4sHHIII16s")
_LIST = struct.Struct("<4sI")
_SUB = struct.Struct("<4sI8s")
_INSTR = struct.Struct("<IHHHBBI")
_U32 = struct.Struct("<I")

_CALLS = (TH10_INS_CALL, TH10_INS_CALL_ASYNC, TH10_INS_CALL_ASYNC_ID)


def _report(options: Options, message: str) -> None:
    options.diagnostics.append(message)
    logger.warning(message)


def _align4(pos: int) -> int:
    return pos + (-pos % 4)


def _check_magic(data: bytes, pos: int, magic: bytes) -> None:
    if data[pos:pos + 4] != magic:
        raise EclError(f"{magic.decode()} signature missing")


def _read_cstring(data: bytes, pos: int) -> tuple[str, int]:
    end = data.find(b"\0", pos)
    if end < 0:
        raise EclError("unterminated string in ECL data")
    return data[pos:end].decode("utf-8", "surrogateescape"), end + 1


def _text(raw: bytes, options: Options) -> str:
    if options.encode_cp932:
        return raw.decode("cp932", "replace")
    return raw.decode("utf-8", "surrogateescape")


def _decode_param(data: bytes, type: str, options: Options):
    """Decode one parameter; return value, stored value type and bytes used."""
    if type == "D":
        if len(data) < SUB_PARAM_SIZE:
            raise EclError("not enough data for a sub call parameter")
        return bytes(data[:SUB_PARAM_SIZE]), "m", SUB_PARAM_SIZE
    if type in ("o", "t"):
        value, used = decode_value(data, "S")
        return value, "S", used
    if type in ("m", "x"):
        if len(data) < _U32.size:
            raise EclError("not enough data for a string length")
        (length,) = _U32.unpack_from(data)
        raw = bytes(data[_U32.size:_U32.size + length])
        if len(raw) < length:
            raise EclError("string runs past the end of the instruction")
        if type == "x":
            raw = xor_bytes(raw, 0x77, 7, 16)
        return _text(raw.split(b"\0", 1)[0], options), "z", _U32.size + length
    value, used = decode_value(data, type)
    return value, type, used


def _decode_params(data: bytes, format: str, options: Options):
    """Decode ``data`` by ``format``; return (type, value, value_type) items and
    the unconsumed rest of the format."""
    values = []
    pos = 0
    p = 0
    while pos < len(data):
        if p >= len(format):
            raise EclError("instruction has more data than its format describes")
        repeat = format[p] == "*"
        if repeat:
            if p + 1 >= len(format):
                raise EclError("'*' at the end of a format")
            char = format[p + 1]
        else:
            char = format[p]
        value, value_type, used = _decode_param(data[pos:], char, options)
        values.append((char, value, value_type))
        pos += used
        if not repeat:
            p += 1
    return values, format[p:]


def _insert_labels(ecl: Ecl) -> None:
    for sub in ecl.subs:
        for instr in [i for i in sub.instrs if i.params]:
            for param in instr.params:
                if param.type != "o":
                    continue
                target = instr.offset + param.value
                for index, found in enumerate(sub.instrs):
                    if found.offset == target:
                        if found.type is not InstrType.LABEL:
                            sub.instrs.insert(index, make_label(found.offset))
                        break


def _read_instrs(
    data: bytes, sub: Sub, start: int, stops: set[int], version: int, options: Options
) -> None:
    time = 0
    rank = 0xFF
    pos = start + _SUB.size
    while pos not in stops:
        if pos + _INSTR.size > len(data):
            raise EclError(f"instruction at {pos:#x} runs past the end of the file")
        itime, iid, size, param_mask, rank_mask, param_count, _ = _INSTR.unpack_from(data, pos)
        if size < _INSTR.size or pos + size > len(data):
            raise EclError(f"bad instruction size {size} at {pos:#x}")
        offset = pos - start

        if itime != time:
            marker = make_time(itime)
            marker.offset = offset
            sub.instrs.append(marker)
            time = itime
        if rank_mask != rank:
            marker = make_rank(rank_mask)
            marker.offset = offset
            sub.instrs.append(marker)
            rank = rank_mask

        instr = Instr(
            id=iid,
            param_count=param_count,
            offset=offset,
            address=offset + start,
            size=size,
        )
        sub.instrs.append(instr)

        format = find_format(version, iid, False, options.eclmap)
        payload = data[pos + _INSTR.size:pos + size]
        if format is None:
            _report(
                options,
                f"id {iid} was not found in the format table "
                f"(total parameter size is {len(payload)})",
            )
            format = "*S"

        mismatch = False
        if payload:
            try:
                values, rest = _decode_params(payload, format, options)
            except EclError as exc:
                name = options.eclmap.ins_names.get(iid)
                label = f"{iid} ({name})" if name else f"{iid}"
                raise EclError(f"error when dumping opcode {label}: {exc}") from exc
            for char, value, value_type in values:
                instr.params.append(
                    Param(type=char, value=value, value_type=value_type,
                          stack=bool(param_mask & 1))
                )
                param_mask >>= 1
            mismatch = bool(rest) and rest[0] != "*"
        elif format:
            mismatch = True

        if mismatch:
            _report(
                options,
                f"error when dumping opcode {iid}: format specifies more parameters "
                "than the instruction has, recompiling will fail!",
            )
        pos += size


def open_ecl(data: bytes, version: int, options: Options | None = None) -> Ecl:
    """Parse a th10-family ECL file held in ``data``."""
    if options is None:
        options = Options()
    data = bytes(data)
    if len(data) < _HEADER.size:
        raise EclError("file is too small for an ECL header")

    magic, _, _, include_offset, _, sub_count, _ = _HEADER.unpack_from(data)
    if magic != b"SCPT":
        raise EclError("SCPT signature missing")

    ecl = Ecl(version=version, sub_count=sub_count)

    pos = include_offset
    _check_magic(data, pos, b"ANIM")
    _, count = _LIST.unpack_from(data, pos)
    pos += _LIST.size
    for _ in range(count):
        name, pos = _read_cstring(data, pos)
        ecl.anim_names.append(name)

    pos = _align4(pos)
    _check_magic(data, pos, b"ECLI")
    _, count = _LIST.unpack_from(data, pos)
    pos += _LIST.size
    for _ in range(count):
        name, pos = _read_cstring(data, pos)
        ecl.ecli_names.append(name)

    pos = _align4(pos)
    if pos + sub_count * _U32.size > len(data):
        raise EclError("sub offset table runs past the end of the file")
    offsets = list(struct.unpack_from(f"<{sub_count}I", data, pos))
    pos += sub_count * _U32.size

    for i, start in enumerate(offsets):
        name, pos = _read_cstring(data, pos)
        sub = Sub(name=name, offset=start)
        ecl.subs.append(sub)
        _check_magic(data, start, b"ECLH")
        stops = {len(data)}
        if i + 1 < len(offsets):
            stops.add(offsets[i + 1])
        _read_instrs(data, sub, start, stops, version, options)

    _insert_labels(ecl)
    return ecl


def _first_param(instr: Instr) -> Param:
    if not instr.params:
        raise EclError(f"instruction {instr.id} has no parameters")
    return instr.params[0]


def _set_arity(sub: Sub, arity: int, options: Options) -> None:
    if sub.arity != -1 and sub.arity != arity:
        _report(options, f"arity mismatch {sub.arity} {arity} for {sub.name}")
    else:
        sub.arity = arity


def trans(ecl: Ecl | None, options: Options | None = None) -> None:
    """Derive stack sizes and sub arities, adding forward declarations for
    subs that are called but not defined."""
    if options is None:
        options = Options()
    if ecl is None or options.rawoutput:
        return
    for sub in list(ecl.subs):
        for instr in sub.instrs:
            if instr.type is not InstrType.INSTR:
                continue
            if instr.id == TH10_INS_STACK_ALLOC:
                sub.stack = _first_param(instr).value
            elif instr.id in _CALLS:
                name = _first_param(instr).value
                required = 2 if instr.id == TH10_INS_CALL_ASYNC_ID else 1
                arity = instr.param_count - required
                found = next((s for s in ecl.subs if s.name == name), None)
                if found is not None:
                    _set_arity(found, arity, options)
                else:
                    ecl.subs.insert(
                        0, Sub(name=name, forward_declaration=True, arity=arity)
                    )