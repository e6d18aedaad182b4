import datetime

import numpy
import pytest

from gildas_spectral_pipeline import (
    CorruptOffset,
    FormatError,
    NativeOrderCodec,
    SwappedOrderCodec,
    get_codec,
    get_image_codec,
)
from gildas_spectral_pipeline.codec import date_to_gildas_day, gildas_day_to_date


def test_byte_order():
    buffer = bytearray(4)
    NativeOrderCodec().write_i32(buffer, 0, 1)
    assert bytes(buffer) == b"\x00\x00\x00\x01"
    SwappedOrderCodec().write_i32(buffer, 0, 1)
    assert bytes(buffer) == b"\x01\x00\x00\x00"


@pytest.mark.parametrize("codec", [NativeOrderCodec(), SwappedOrderCodec()])
def test_scalars_at_offsets(codec):
    buffer = bytearray(64)
    codec.write_i16(buffer, 2, -7)
    codec.write_i32(buffer, 4, 123456)
    codec.write_i64(buffer, 8, -(2**40))
    codec.write_f32(buffer, 16, 0.5)
    codec.write_f64(buffer, 20, 115271.2018)
    codec.write_str(buffer, 28, "ORION")

    assert codec.read_i16(buffer, 2) == -7
    assert codec.read_i32(buffer, 4) == 123456
    assert codec.read_i64(buffer, 8) == -(2**40)
    assert codec.read_f32(buffer, 16) == 0.5
    assert codec.read_f64(buffer, 20) == 115271.2018
    assert codec.read_str(buffer, 28) == "ORION"
    assert bytes(buffer[28:40]) == b"ORION       "


def test_swapped_codec_reverses_each_scalar():
    native, swapped = NativeOrderCodec(), SwappedOrderCodec()
    a, b = bytearray(8), bytearray(8)
    native.write_f64(a, 0, -3.25)
    swapped.write_f64(b, 0, -3.25)
    assert bytes(a) == bytes(b)[::-1]


def test_f32_array():
    codec = SwappedOrderCodec()
    values = numpy.array([1.0, -2.5, 3.75], dtype=numpy.float32)
    buffer = bytearray(16)
    codec.write_f32_array(buffer, 4, values)
    assert codec.read_f32(buffer, 8) == -2.5
    numpy.testing.assert_array_equal(codec.read_f32_array(buffer, 4, 3), values)


def test_out_of_bounds_access():
    codec = NativeOrderCodec()
    with pytest.raises(CorruptOffset) as excinfo:
        codec.read_i32(bytes(6), 4)
    assert excinfo.value.offset == 4
    with pytest.raises(CorruptOffset):
        codec.read_f32_array(bytes(8), 0, 3)
    with pytest.raises(CorruptOffset):
        codec.write_f64(bytearray(8), 1, 1.0)


def test_field_kinds():
    codec = NativeOrderCodec()
    buffer = bytearray(16)
    codec.write_field("i32", buffer, 0, 4.0)
    assert codec.read_field("i32", buffer, 0) == 4
    with pytest.raises(ValueError):
        codec.read_field("i8", buffer, 0)


def test_dates():
    date = datetime.date(2010, 3, 14)
    day = date_to_gildas_day(date)
    assert gildas_day_to_date(day) == date
    assert gildas_day_to_date(day + 1) == datetime.date(2010, 3, 15)

    buffer = bytearray(4)
    codec = SwappedOrderCodec()
    codec.write_date(buffer, 0, date)
    assert codec.read_i32(buffer, 0) == day
    assert codec.read_date(buffer, 0) == date


def test_get_codec():
    assert get_codec("1B  ") == NativeOrderCodec()
    assert get_codec(b"1A  ") == SwappedOrderCodec()
    with pytest.raises(FormatError):
        get_codec("1   ")
    with pytest.raises(FormatError):
        get_codec("2A  ")
    with pytest.raises(FormatError):
        get_codec("XX")


def test_get_image_codec():
    assert get_image_codec(".") == NativeOrderCodec()
    assert get_image_codec("-") == SwappedOrderCodec()
    with pytest.raises(FormatError):
        get_image_codec("_")
    with pytest.raises(FormatError):
        get_image_codec("?")
