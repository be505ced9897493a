import math
import struct

import pytest

from eclkit.model import (
    Ecl,
    EclError,
    Instr,
    InstrType,
    Label,
    Options,
    Param,
    Sub,
    decode_value,
    encode_value,
    find_format,
    format_float,
    get_default_none_rank,
    is_numeric_difficulty_version,
    is_post_th10,
    is_post_th13,
    make_label,
    make_rank,
    make_time,
    value_size,
    value_to_text,
    xor_bytes,
)


@pytest.mark.parametrize("version", [6, 7, 8, 9, 95])
def test_pre_th10_versions(version):
    assert is_post_th10(version) is False
    assert is_post_th13(version) is False


@pytest.mark.parametrize("version", [10, 103, 11, 12, 125, 128])
def test_th10_to_th128_versions(version):
    assert is_post_th10(version) is True
    assert is_post_th13(version) is False


@pytest.mark.parametrize("version", [13, 14, 143, 15, 16, 165, 17, 18, 185, 19])
def test_post_th13_versions(version):
    assert is_post_th10(version) is True
    assert is_post_th13(version) is True


def test_numeric_difficulty_versions():
    assert is_numeric_difficulty_version(185)
    assert is_numeric_difficulty_version(19)
    assert not is_numeric_difficulty_version(18)


def test_default_none_rank():
    assert get_default_none_rank(12) == 0xF0
    assert get_default_none_rank(185) == 0x00
    assert get_default_none_rank(17) == 0xC0


def test_markers():
    assert make_time(30).type is InstrType.TIME and make_time(30).time == 30
    assert make_rank(0xFF).rank == 0xFF and make_rank(0xFF).type is InstrType.RANK
    label = make_label(48)
    assert label.type is InstrType.LABEL and label.offset == 48


def test_instr_defaults():
    instr = Instr()
    assert instr.type is InstrType.INSTR
    assert instr.params == []
    assert Instr().params is not instr.params


def test_param_value_type_defaults_to_type():
    assert Param("S", 5).value_type == "S"
    assert Param("o", "lbl", value_type="z").value_type == "z"


def test_param_copy_is_independent():
    original = Param("m", bytearray(b"ab"), stack=True)
    duplicate = original.copy()
    duplicate.value[0] = ord("x")
    assert original.value == bytearray(b"ab")
    assert duplicate.stack is True and duplicate.type == "m"


def test_sub_labels():
    sub = Sub("main", labels=[Label("main_16", 16, 60), Label("main_32", 32, 90)])
    assert sub.label_offset("main_32") == 32
    assert sub.label_time("main_16") == 60
    assert sub.arity == -1


def test_sub_missing_label_raises():
    with pytest.raises(EclError):
        Sub("main").label_offset("nowhere")
    with pytest.raises(EclError):
        Sub("main").label_time("nowhere")


def test_ecl_and_options_defaults():
    ecl = Ecl(version=13)
    assert ecl.subs == [] and ecl.no_warn is False
    options = Options()
    assert options.rawoutput is False and options.eclmap.ins_names == {}


@pytest.mark.parametrize(
    "type, value",
    [("S", -9982), ("s", -2), ("U", 0xFFFFFFFF), ("u", 65535), ("C", 200), ("c", -3)],
)
def test_integer_round_trip(type, value):
    encoded = encode_value(value, type)
    assert decode_value(encoded, type) == (value, len(encoded))
    assert value_size(value, type) == len(encoded)


def test_wire_bytes_little_endian():
    assert encode_value(1, "S") == b"\x01\x00\x00\x00"
    assert encode_value(-1, "S") == b"\xff\xff\xff\xff"
    assert encode_value(1.0, "f") == struct.pack("<f", 1.0)


def test_float_round_trip():
    value, used = decode_value(encode_value(0.5, "f"), "f")
    assert value == 0.5 and used == 4


def test_string_round_trip():
    encoded = encode_value("boss", "z")
    assert encoded == b"boss\0"
    assert decode_value(encoded + b"junk", "z") == ("boss", 5)


def test_raw_bytes_take_all():
    assert decode_value(b"\x01\x02\x03", "m") == (b"\x01\x02\x03", 3)


def test_decode_short_data_raises():
    with pytest.raises(EclError):
        decode_value(b"\x01\x02", "S")


def test_unknown_type_raises():
    with pytest.raises(EclError):
        decode_value(b"\x00" * 4, "?")
    with pytest.raises(EclError):
        encode_value(1, "?")


def test_value_to_text():
    assert value_to_text(-9982, "S") == "-9982"
    assert value_to_text('a"b\\', "z") == '"a\\"b\\\\"'


@pytest.mark.parametrize("value", [0.0, 1.0, 0.1, -3.25, 100.0, 1e-7, 123456.789])
def test_format_float_round_trips(value):
    text = format_float(value)
    assert "." in text and "e" not in text
    assert struct.pack("<f", float(text)) == struct.pack("<f", value)


def test_format_float_integral():
    assert format_float(2.0) == "2.0"


def test_format_float_special():
    assert format_float(math.inf) == "inf"
    assert format_float(math.nan) == "nan"


def test_xor_constant_key():
    assert xor_bytes(b"\x00\x00", 0xAA) == b"\xaa\xaa"


def test_xor_round_trip_with_steps():
    data = bytes(range(40))
    scrambled = xor_bytes(data, 0x77, 7, 16)
    assert scrambled != data
    assert xor_bytes(scrambled, 0x77, 7, 16) == data


def test_find_format_first_match():
    table = [(440, "S"), (440, "f"), (12, "ot")]
    assert find_format(table, 440) == "S"
    assert find_format(table, 12) == "ot"
    assert find_format(table, 13) is None