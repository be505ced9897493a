import io
import struct

import pytest

from eclkit.model import (
    SUB_PARAM_STRUCT,
    Ecl,
    EclError,
    Instr,
    Label,
    Options,
    Param,
    Sub,
    Variable,
    xor_bytes,
)
from eclkit.th10_reader import open_ecl
from eclkit.th10_writer import compile_ecl, create_header, instr_size, serialize_instr

HEADER = struct.Struct("<IHHHBBI")


def d_param(frm, to, value, stack=False):
    data = struct.pack("<f", value) if frm == b"f" else struct.pack("<i", value)
    return Param(type="D", value=SUB_PARAM_STRUCT.pack(frm, to, 0, data), value_type="m", stack=stack)


def serialize(instr, version=13, sub=None, subs=(), options=None, no_warn=False):
    sub = sub or Sub(name="main")
    options = options or Options()
    return serialize_instr(version, sub, instr, subs, no_warn, options), options


@pytest.mark.parametrize(
    "params",
    [
        [],
        [Param("S", 5)],
        [Param("f", 1.5), Param("S", -3)],
        [Param("m", "", value_type="z")],
        [Param("m", "abc", value_type="z"), Param("S", 1)],
        [Param("x", "abcd", value_type="z")],
        [d_param(b"i", b"i", 7)],
    ],
)
def test_instr_size_matches_serialized_length(params):
    instr = Instr(id=17, params=params, param_count=len(params))
    data, _ = serialize(instr)
    assert len(data) == instr_size(13, instr)


@pytest.mark.parametrize("text", ["", "a", "abc", "abcd", "abcdefg"])
def test_text_params_are_padded_to_multiple_of_four(text):
    empty = instr_size(13, Instr())
    size = instr_size(13, Instr(params=[Param("m", text, value_type="z")]))
    assert size % 4 == 0
    assert size - empty - 4 > len(text)


def test_timeline_instructions_have_no_size():
    assert instr_size(13, Instr(params=[Param("S", 1)]), True) == 0


def test_header_fields():
    instr = Instr(id=17, time=30, rank=0xFF, param_count=1, params=[Param("S", 5, stack=True)])
    data, options = serialize(instr)
    time, iid, size, mask, rank, count, zero = HEADER.unpack_from(data)
    assert (time, iid, size, rank, count) == (30, 17, len(data), 0xFF, 1)
    assert mask == 1
    assert zero == 0
    assert data[HEADER.size:] == struct.pack("<i", 5)
    assert options.diagnostics == []


def test_jump_params_use_labels():
    sub = Sub(name="main", labels=[Label("L", offset=48, time=7)])
    instr = Instr(
        id=12,
        param_count=2,
        params=[Param("o", "L", value_type="z"), Param("t", "L", value_type="z")],
    )
    data, _ = serialize(instr, sub=sub)
    assert struct.unpack_from("<ii", data, HEADER.size) == (48, 7)


def test_jump_offset_is_relative_to_instruction():
    sub = Sub(name="main", labels=[Label("L", offset=0)])
    instr = Instr(id=12, offset=16, params=[Param("o", "L", value_type="z"), Param("t", 99, value_type="S")])
    data, _ = serialize(instr, sub=sub)
    assert struct.unpack_from("<ii", data, HEADER.size) == (-instr.offset, 99)


def test_missing_label_raises():
    instr = Instr(id=12, params=[Param("o", "nowhere", value_type="z"), Param("t", 0, value_type="S")])
    with pytest.raises(EclError):
        serialize(instr)


def test_xor_text_is_masked():
    instr = Instr(id=17, params=[Param("x", "hello", value_type="z")])
    data, _ = serialize(instr)
    (length,) = struct.unpack_from("<I", data, HEADER.size)
    raw = data[HEADER.size + 4:HEADER.size + 4 + length]
    assert length % 4 == 0
    assert not raw.startswith(b"hello")
    assert xor_bytes(raw, 0x77, 7, 16).rstrip(b"\0") == b"hello"


def test_plain_text_is_nul_terminated():
    instr = Instr(id=17, params=[Param("m", "abc", value_type="z")])
    data, _ = serialize(instr)
    assert data[HEADER.size + 4:].startswith(b"abc\0")


def test_cp932_text_encoding():
    options = Options(encode_cp932=True)
    instr = Instr(id=17, params=[Param("m", "あ", value_type="z")])
    data, _ = serialize(instr, options=options)
    encoded = "あ".encode("cp932")
    assert data[HEADER.size + 4:HEADER.size + 4 + len(encoded)] == encoded
    assert len(data) == instr_size(13, instr, False, options)


def test_stack_references_counted_post_th13():
    params = [Param("S", -1, stack=True), Param("f", -2.0, stack=True)]
    data, _ = serialize(Instr(id=17, params=params))
    assert HEADER.unpack_from(data)[6] == 16


def test_stack_references_ignored_before_th13():
    params = [Param("S", -1, stack=True), Param("f", -2.0, stack=True)]
    data, _ = serialize(Instr(id=17, params=params), version=12)
    assert HEADER.unpack_from(data)[6] == 0


def test_sub_param_counts_as_stack_reference():
    target = Sub(name="target", format="S")
    instr = Instr(id=11, params=[Param("m", "target", value_type="z"), d_param(b"i", b"i", -1, stack=True)])
    data, _ = serialize(instr, subs=[target])
    assert HEADER.unpack_from(data)[6] == 1 << 3


def test_too_many_arguments_reported():
    _, options = serialize(Instr(id=17, params=[Param("S", 1), Param("S", 2)]))
    assert any("too many arguments" in d for d in options.diagnostics)
    assert not any("too few" in d for d in options.diagnostics)


def test_too_few_arguments_reported():
    _, options = serialize(Instr(id=17))
    assert any("too few arguments" in d for d in options.diagnostics)


def test_unknown_instruction_reported():
    _, options = serialize(Instr(id=9999))
    assert any("is not known to exist in version 13" in d for d in options.diagnostics)


def test_unknown_sub_call_warns():
    instr = Instr(id=11, params=[Param("m", "ghost", value_type="z")])
    _, options = serialize(instr)
    assert any('unknown sub call "ghost"' in d for d in options.diagnostics)


def test_no_warn_silences_unknown_sub_call():
    instr = Instr(id=11, params=[Param("m", "ghost", value_type="z")])
    _, options = serialize(instr, no_warn=True)
    assert not any("unknown sub call" in d for d in options.diagnostics)


def test_wrong_argument_type_reported():
    target = Sub(name="target", format="S")
    instr = Instr(id=11, params=[Param("m", "target", value_type="z"), d_param(b"i", b"f", 1)])
    _, options = serialize(instr, subs=[target])
    assert any("wrong type for parameter 1" in d for d in options.diagnostics)


def test_argument_count_checked():
    target = Sub(name="target", format="SS")
    few = Instr(id=11, params=[Param("m", "target", value_type="z"), d_param(b"i", b"i", 1)])
    _, options = serialize(few, subs=[target])
    assert any("not enough parameters" in d for d in options.diagnostics)

    one = Sub(name="target", format="S")
    many = Instr(
        id=11,
        params=[Param("m", "target", value_type="z"), d_param(b"i", b"i", 1), d_param(b"i", b"i", 2)],
    )
    _, options = serialize(many, subs=[one])
    assert any("too many parameters" in d for d in options.diagnostics)


def test_async_id_slot_is_not_a_sub_argument():
    target = Sub(name="target", format="S")
    instr = Instr(
        id=16,
        params=[Param("m", "target", value_type="z"), Param("S", 3), d_param(b"i", b"i", 1)],
    )
    _, options = serialize(instr, subs=[target])
    assert not any("calling sub" in d for d in options.diagnostics)


def test_simplecreate_skips_call_validation():
    instr = Instr(id=11, params=[Param("m", "ghost", value_type="z")])
    _, options = serialize(instr, options=Options(simplecreate=True))
    assert not any("unknown sub call" in d for d in options.diagnostics)


def test_declared_size_mismatch_raises():
    with pytest.raises(EclError):
        serialize(Instr(id=17, size=100, params=[Param("S", 1)]))


def _sample_ecl():
    main = Sub(
        name="main",
        instrs=[
            Instr(id=17, rank=0xFF, param_count=1, params=[Param("S", 5)]),
            Instr(id=521, rank=0xFF, param_count=2,
                  params=[Param("S", 1), Param("m", "hello", value_type="z")]),
            Instr(id=522, rank=0xFF, param_count=4,
                  params=[Param("S", 1), Param("S", 2), Param("S", 3), Param("x", "secret text", value_type="z")]),
            Instr(id=10, rank=0xFF),
        ],
    )
    other = Sub(name="other", instrs=[Instr(id=10, rank=0xFF)])
    return Ecl(version=13, anim_names=["enemy.anm"], ecli_names=["st01bs.ecl"], subs=[main, other])


def test_compile_round_trip():
    ecl = _sample_ecl()
    out = io.BytesIO()
    compile_ecl(ecl, out)
    data = out.getvalue()

    assert data[:4] == b"SCPT"
    for sub in ecl.subs:
        assert data[sub.offset:sub.offset + 4] == b"ECLH"

    back = open_ecl(data, 13)
    assert back.anim_names == ecl.anim_names
    assert back.ecli_names == ecl.ecli_names
    assert [s.name for s in back.subs] == ["main", "other"]
    main = back.subs[0]
    assert [i.id for i in main.instrs] == [17, 521, 522, 10]
    assert main.instrs[0].params[0].value == 5
    assert main.instrs[1].params[1].value == "hello"
    assert main.instrs[2].params[3].value == "secret text"
    assert [i.id for i in back.subs[1].instrs] == [10]


def test_compile_skips_forward_and_inline_subs():
    ecl = _sample_ecl()
    ecl.subs.insert(0, Sub(name="fwd", forward_declaration=True))
    ecl.subs.append(Sub(name="inl", is_inline=True, instrs=[Instr(id=10)]))
    out = io.BytesIO()
    compile_ecl(ecl, out)
    back = open_ecl(out.getvalue(), 13)
    assert [s.name for s in back.subs] == ["main", "other"]


def test_compile_warns_about_large_opcode_in_th14():
    ecl = Ecl(version=14, subs=[Sub(name="main", instrs=[Instr(id=1004, rank=0xFF)])])
    options = Options()
    compile_ecl(ecl, io.BytesIO(), options)
    assert any("higher than the maximum" in d for d in options.diagnostics)


def test_create_header():
    ecl = Ecl(
        subs=[
            Sub(name="fwd", forward_declaration=True, arity=1),
            Sub(name="f", arity=2, vars=[Variable("a", "S"), Variable("b", "f")]),
            Sub(name="g", arity=1, vars=[Variable("c")]),
            Sub(name="h"),
        ]
    )
    out = io.StringIO()
    create_header(ecl, out)
    assert out.getvalue() == "\nvoid f(int a, float b);\n\nvoid g(var c);\n\nvoid h();\n"


def test_create_header_missing_variables_raises():
    ecl = Ecl(subs=[Sub(name="f", arity=2, vars=[Variable("a", "S")])])
    with pytest.raises(EclError):
        create_header(ecl, io.StringIO())