import datetime
import struct
import typing

import numpy
import numpy.typing

from .errors import CorruptOffset, FormatError

__all__ = [
    "ByteCodec",
    "NativeOrderCodec",
    "SwappedOrderCodec",
    "get_codec",
    "get_image_codec",
    "GILDAS_DATE_ZERO",
]

Buffer = bytes | bytearray | memoryview

MJD_EPOCH = datetime.date(1858, 11, 17)
GILDAS_DATE_ZERO = 60549


class ByteCodec:
    """Fixed-width scalar access at byte offsets inside a buffer.

    Subclasses decide the on-disk byte order. Every access is bounds-checked and
    raises `CorruptOffset` when it would leave the buffer.
    """

    name: str
    code: str
    image_code: str
    byteorder: typing.Literal[">", "<"]

    @staticmethod
    def _check(buffer: Buffer, offset: int, size: int):
        if offset < 0 or offset + size > len(buffer):
            raise CorruptOffset(offset, size=len(buffer))

    def _unpack(self, fmt: str, buffer: Buffer, offset: int):
        raise NotImplementedError

    def _pack(self, fmt: str, buffer: bytearray, offset: int, value):
        raise NotImplementedError

    def read_i16(self, buffer: Buffer, offset: int) -> int:
        return self._unpack("h", buffer, offset)

    def read_i32(self, buffer: Buffer, offset: int) -> int:
        return self._unpack("i", buffer, offset)

    def read_i64(self, buffer: Buffer, offset: int) -> int:
        return self._unpack("q", buffer, offset)

    def read_f32(self, buffer: Buffer, offset: int) -> float:
        return self._unpack("f", buffer, offset)

    def read_f64(self, buffer: Buffer, offset: int) -> float:
        return self._unpack("d", buffer, offset)

    def read_date(self, buffer: Buffer, offset: int) -> datetime.date:
        return gildas_day_to_date(self.read_i32(buffer, offset))

    def read_str(self, buffer: Buffer, offset: int, length: int = 12) -> str:
        self._check(buffer, offset, length)
        raw = bytes(buffer[offset : offset + length])
        return raw.decode("latin-1").rstrip(" \x00")

    def read_f32_array(
        self, buffer: Buffer, offset: int, count: int
    ) -> numpy.typing.NDArray[numpy.float32]:
        self._check(buffer, offset, 4 * count)
        array = numpy.frombuffer(
            buffer, dtype=numpy.dtype(f"{self.byteorder}f4"), count=count, offset=offset
        )
        return array.astype(numpy.float32)

    def write_i16(self, buffer: bytearray, offset: int, value: int):
        self._pack("h", buffer, offset, int(value))

    def write_i32(self, buffer: bytearray, offset: int, value: int):
        self._pack("i", buffer, offset, int(value))

    def write_i64(self, buffer: bytearray, offset: int, value: int):
        self._pack("q", buffer, offset, int(value))

    def write_f32(self, buffer: bytearray, offset: int, value: float):
        self._pack("f", buffer, offset, float(value))

    def write_f64(self, buffer: bytearray, offset: int, value: float):
        self._pack("d", buffer, offset, float(value))

    def write_date(self, buffer: bytearray, offset: int, value: datetime.date | int):
        if isinstance(value, datetime.date):
            value = date_to_gildas_day(value)
        self.write_i32(buffer, offset, value)

    def write_str(self, buffer: bytearray, offset: int, value: str, length: int = 12):
        self._check(buffer, offset, length)
        buffer[offset : offset + length] = fixed_width(value, length).encode("latin-1")

    def write_f32_array(
        self, buffer: bytearray, offset: int, values: numpy.typing.ArrayLike
    ):
        raw = numpy.asarray(values, dtype=numpy.dtype(f"{self.byteorder}f4")).tobytes()
        self._check(buffer, offset, len(raw))
        buffer[offset : offset + len(raw)] = raw

    def read_field(self, kind: str, buffer: Buffer, offset: int):
        """Read a value of `kind` ("str", "i32", "f32" or "f64")."""
        if kind == "str":
            return self.read_str(buffer, offset)
        if kind == "i32":
            return self.read_i32(buffer, offset)
        if kind == "f32":
            return self.read_f32(buffer, offset)
        if kind == "f64":
            return self.read_f64(buffer, offset)
        raise ValueError(f"Unknown field type {kind = }.")

    def write_field(self, kind: str, buffer: bytearray, offset: int, value):
        if kind == "str":
            self.write_str(buffer, offset, str(value))
        elif kind == "i32":
            self.write_i32(buffer, offset, int(float(value)))
        elif kind == "f32":
            self.write_f32(buffer, offset, float(value))
        elif kind == "f64":
            self.write_f64(buffer, offset, float(value))
        else:
            raise ValueError(f"Unknown field type {kind = }.")

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"

    def __eq__(self, other) -> bool:
        return type(self) is type(other)

    def __hash__(self):
        return hash(type(self))


class NativeOrderCodec(ByteCodec):
    name = "EEEI"
    code = "1B  "
    image_code = "."
    byteorder = ">"

    def _unpack(self, fmt: str, buffer: Buffer, offset: int):
        size = struct.calcsize(">" + fmt)
        self._check(buffer, offset, size)
        (value,) = struct.unpack_from(">" + fmt, buffer, offset)
        return value

    def _pack(self, fmt: str, buffer: bytearray, offset: int, value):
        size = struct.calcsize(">" + fmt)
        self._check(buffer, offset, size)
        struct.pack_into(">" + fmt, buffer, offset, value)


class SwappedOrderCodec(ByteCodec):
    name = "IEEE"
    code = "1A  "
    image_code = "-"
    byteorder = "<"
    _native = NativeOrderCodec()

    # Each scalar is reversed on its own width, then decoded as native order.
    def _unpack(self, fmt: str, buffer: Buffer, offset: int):
        size = struct.calcsize(">" + fmt)
        self._check(buffer, offset, size)
        swapped = bytes(buffer[offset : offset + size])[::-1]
        return self._native._unpack(fmt, swapped, 0)

    def _pack(self, fmt: str, buffer: bytearray, offset: int, value):
        size = struct.calcsize(">" + fmt)
        self._check(buffer, offset, size)
        scratch = bytearray(size)
        self._native._pack(fmt, scratch, 0, value)
        buffer[offset : offset + size] = scratch[::-1]


def gildas_day_to_date(day: int) -> datetime.date:
    return MJD_EPOCH + datetime.timedelta(days=GILDAS_DATE_ZERO + day)


def date_to_gildas_day(date: datetime.date) -> int:
    return (date - MJD_EPOCH).days - GILDAS_DATE_ZERO


def fixed_width(value: str, length: int = 12) -> str:
    return value[:length].ljust(length)


def get_codec(code: str | bytes) -> ByteCodec:
    """Select the codec for the 4-character code of a container preamble.

    Args:
        code (str | bytes): Format code, e.g. "1B  " or "1A  ".

    Raises:
        FormatError: VAX files, newer container versions and unknown codes.

    Returns:
        ByteCodec: The matching codec.
    """
    if isinstance(code, bytes):
        code = code.decode("latin-1")
    if code == NativeOrderCodec.code:
        return NativeOrderCodec()
    if code == SwappedOrderCodec.code:
        return SwappedOrderCodec()
    if code.startswith("2"):
        raise FormatError(f"Container version 2 is not supported ({code = !r}).")
    if len(code) >= 2:
        if code[1] == "B":
            return NativeOrderCodec()
        if code[1] == "A":
            return SwappedOrderCodec()
        if code[1] == " ":
            raise FormatError("VAX encoded files are not supported.")
    raise FormatError(f"Unrecognized format {code = !r}.")


def get_image_codec(code: str | bytes) -> ByteCodec:
    if isinstance(code, bytes):
        code = code.decode("latin-1")
    if code == NativeOrderCodec.image_code:
        return NativeOrderCodec()
    if code == SwappedOrderCodec.image_code:
        return SwappedOrderCodec()
    if code == "_":
        raise FormatError("VAX encoded cubes are not supported.")
    raise FormatError(f"Unrecognized image format {code = !r}.")
