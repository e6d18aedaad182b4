import dataclasses
import math
import pathlib
import typing

import loguru
import numpy
import pandas
import sortedcontainers  # type: ignore

from .codec import ByteCodec, NativeOrderCodec, get_codec
from .errors import CorruptOffset
from .parameter import DataKind, Parameter, ParameterKey as K
from .spectrum_header import SpectrumHeader
from .spectrum_record import SpectrumRecord

__all__ = [
    "SpectrumContainer",
    "write_container",
]

BLOCK_SIZE = 512
ENTRY_SIZE = 128
PRIMARY_INDEX_LENGTH = 251
PRIMARY_INDEX_FILL = 3
PREAMBLE_SIZE = 20 + 4 * PRIMARY_INDEX_LENGTH
FIRST_DATA_BLOCK = 99
MAX_ENTRIES_BEFORE_DATA = 384
DATA_ADDRESS = 143
SECTION_ADDRESS = 25


class SectionId:
    GENERAL = -2
    POSITION = -3
    SPECTROSCOPY = -4
    BASELINE = -5
    FREQUENCY_SWITCHING = -8
    CONTINUUM = -10
    CALIBRATION = -14
    DATA_DESCRIPTOR = -30


# (key, type, byte offset inside the section)
SectionLayout = list[tuple[str, str, int]]

GENERAL_LAYOUT: SectionLayout = [
    (K.UT_TIME, "f64", 0),
    (K.LST_TIME, "f64", 8),
    (K.AZIMUTH, "f32", 16),
    (K.ELEVATION, "f32", 20),
    (K.TAU, "f32", 24),
    (K.TSYS, "f32", 28),
    (K.INTEG, "f32", 32),
]

POSITION_LAYOUT: SectionLayout = [
    (K.SOURCE, "str", 0),
    (K.EPOCH, "f32", 12),
    (K.LAMBDA, "f64", 16),
    (K.BETA, "f64", 24),
    (K.LAMBDA_OFF, "f32", 32),
    (K.BETA_OFF, "f32", 36),
    (K.PROJECTION, "i32", 40),
]

SPECTROSCOPY_LAYOUT: SectionLayout = [
    (K.LINE, "str", 0),
    (K.REF_FREQ, "f64", 12),
    (K.NCHAN, "i32", 20),
    (K.REF_CHAN, "f32", 24),
    (K.FREQ_RESOL, "f32", 28),
    (K.FREQ_OFF, "f32", 32),
    (K.VEL_RESOL, "f32", 36),
    (K.REF_VEL, "f32", 40),
    (K.BAD, "f32", 44),
    (K.IMAGE, "f64", 48),
    (K.VEL_TYPE, "i32", 56),
]
DOPPLER_FIELD = (K.DOPPLER, "f64", 60)
DOPPLER_MIN_WORDS = 17

CALIBRATION_LAYOUT: SectionLayout = [
    (K.BEAM_EFF, "f32", 0),
    (K.FORW_EFF, "f32", 4),
    (K.GAIN_IM, "f32", 8),
    (K.H2OMM, "f32", 12),
    (K.PAMB, "f32", 16),
    (K.TAMB, "f32", 20),
    (K.TATMSIG, "f32", 24),
    (K.TCHOP, "f32", 28),
    (K.TCOLD, "f32", 32),
    (K.TAUSIG, "f32", 36),
    (K.TAUIMA, "f32", 40),
    (K.TATMIMG, "f32", 44),
    (K.TREC, "f32", 48),
    (K.MODE, "i32", 52),
    (K.FACTOR, "f32", 56),
    (K.ALTITUDE, "f32", 60),
    (K.COUNT1, "f32", 64),
    (K.COUNT2, "f32", 68),
    (K.COUNT3, "f32", 72),
    (K.LONOFF, "f32", 76),
    (K.LATOFF, "f32", 80),
    (K.LON, "f64", 84),
    (K.LAT, "f64", 92),
]

CONTINUUM_LAYOUT: SectionLayout = [
    (K.COL_AZ, "f32", 56),
    (K.COL_EL, "f32", 60),
]

DATA_DESCRIPTOR_LAYOUT: SectionLayout = [
    (K.OTF_NDUMPS, "i32", 0),
    (K.OTF_LEN_HEADER, "i32", 4),
    (K.OTF_LEN_DATA, "i32", 8),
    (K.OTF_LEN_DUMP, "i32", 12),
]

BASELINE_LAYOUT: SectionLayout = [
    ("deg", "i32", 0),
    (K.SIGMA, "f32", 4),
    ("aire", "f32", 8),
    ("nwind", "i32", 12),
]

# Sections written for every observation, with their lengths in words.
WRITTEN_SECTIONS: list[tuple[int, SectionLayout, int]] = [
    (SectionId.GENERAL, GENERAL_LAYOUT, 9),
    (SectionId.POSITION, POSITION_LAYOUT, 11),
    (SectionId.SPECTROSCOPY, SPECTROSCOPY_LAYOUT, 15),
    (SectionId.CALIBRATION, CALIBRATION_LAYOUT, 25),
    (SectionId.BASELINE, BASELINE_LAYOUT, 4),
]

# Fields of the baseline section that are not carried as parameters.
_UNSTORED_KEYS = {"deg", "aire", "nwind"}


def _parse_layout(
    codec: ByteCodec, buffer: bytes, base: int, layout: SectionLayout
) -> dict[str, Parameter]:
    parameters = dict()
    for key, kind, offset in layout:
        if str(key) in _UNSTORED_KEYS:
            continue
        value = codec.read_field(kind, buffer, base + offset)
        parameters[str(key)] = Parameter.for_key(key, value)
    return parameters


def _parse_spectroscopy(
    codec: ByteCodec, buffer: bytes, base: int, length: int
) -> dict[str, Parameter]:
    parameters = _parse_layout(codec, buffer, base, SPECTROSCOPY_LAYOUT)
    doppler = 0.0
    if length >= DOPPLER_MIN_WORDS:
        _, kind, offset = DOPPLER_FIELD
        doppler = codec.read_field(kind, buffer, base + offset)
    parameters[str(K.DOPPLER)] = Parameter.for_key(K.DOPPLER, doppler)
    return parameters


def _parse_frequency_switching(
    codec: ByteCodec, buffer: bytes, base: int, length: int
) -> dict[str, Parameter]:
    nphase = codec.read_i32(buffer, base)
    parameters = {str(K.NPHASE): Parameter.for_key(K.NPHASE, nphase)}
    for i in range(nphase):
        values = {
            K.SWDECALAGE: codec.read_f64(buffer, base + 4 + 8 * i),
            K.SWDURATION: codec.read_f32(buffer, base + 4 + 8 * nphase + 4 * i),
            K.SWPOIDS: codec.read_f32(buffer, base + 4 + 12 * nphase + 4 * i),
            K.SWLDECAL: codec.read_f32(buffer, base + 8 + 16 * nphase + 4 * i),
            K.SWBDECAL: codec.read_f32(buffer, base + 8 + 20 * nphase + 4 * i),
        }
        for key, value in values.items():
            parameters[f"{key}{i}"] = Parameter.for_key(f"{key}{i}", value)
    swmode = codec.read_i32(buffer, base + 4 + 16 * nphase)
    parameters[str(K.SWMODE)] = Parameter.for_key(K.SWMODE, swmode)
    return parameters


SectionParser = typing.Callable[[ByteCodec, bytes, int, int], dict[str, Parameter]]


def _layout_parser(layout: SectionLayout) -> SectionParser:
    def parser(codec: ByteCodec, buffer: bytes, base: int, length: int):
        return _parse_layout(codec, buffer, base, layout)

    return parser


SECTION_PARSERS: dict[int, SectionParser] = {
    SectionId.GENERAL: _layout_parser(GENERAL_LAYOUT),
    SectionId.POSITION: _layout_parser(POSITION_LAYOUT),
    SectionId.SPECTROSCOPY: _parse_spectroscopy,
    SectionId.CONTINUUM: _layout_parser(CONTINUUM_LAYOUT),
    SectionId.CALIBRATION: _layout_parser(CALIBRATION_LAYOUT),
    SectionId.DATA_DESCRIPTOR: _layout_parser(DATA_DESCRIPTOR_LAYOUT),
    SectionId.FREQUENCY_SWITCHING: _parse_frequency_switching,
    SectionId.BASELINE: _layout_parser(BASELINE_LAYOUT),
}


def parse_entry(codec: ByteCodec, buffer: bytes) -> SpectrumHeader:
    """Decode one 128-byte index entry."""
    return SpectrumHeader(
        block=codec.read_i32(buffer, 0),
        num=codec.read_i32(buffer, 4),
        version=codec.read_i32(buffer, 8),
        source=codec.read_str(buffer, 12),
        line=codec.read_str(buffer, 24),
        teles=codec.read_str(buffer, 36),
        ldobs=codec.read_i32(buffer, 48),
        ldred=codec.read_i32(buffer, 52),
        off1=codec.read_f32(buffer, 56),
        off2=codec.read_f32(buffer, 60),
        typec=codec.read_i32(buffer, 64),
        kind=codec.read_i32(buffer, 68),
        qual=codec.read_i32(buffer, 72),
        scan=codec.read_i32(buffer, 76),
        posa=codec.read_f32(buffer, 80),
    )


def encode_entry(codec: ByteCodec, header: SpectrumHeader, block: int) -> bytearray:
    buffer = bytearray(ENTRY_SIZE)
    codec.write_i32(buffer, 0, block)
    codec.write_i32(buffer, 4, header.num)
    codec.write_i32(buffer, 8, header.version)
    codec.write_str(buffer, 12, header.source)
    codec.write_str(buffer, 24, header.line)
    codec.write_str(buffer, 36, header.teles)
    codec.write_i32(buffer, 48, header.ldobs)
    codec.write_i32(buffer, 52, header.ldred)
    codec.write_f32(buffer, 56, header.off1)
    codec.write_f32(buffer, 60, header.off2)
    codec.write_i32(buffer, 64, header.typec)
    codec.write_i32(buffer, 68, header.kind)
    codec.write_i32(buffer, 72, header.qual)
    codec.write_i32(buffer, 76, header.scan)
    codec.write_f32(buffer, 80, header.posa)
    codec.write_str(buffer, 116, "")
    return buffer


@dataclasses.dataclass(frozen=True)
class Unindexed:
    pass


@dataclasses.dataclass
class Indexed:
    entries: sortedcontainers.SortedDict
    file_order: list[int]


class SpectrumContainer:
    """Reader for CLASS 30m containers (`.30m` files).

    The preamble is read when the file is opened. The index of observations is
    built on first use, or explicitly with `create_index()`.

    Example:
        with SpectrumContainer("obs.30m") as container:
            for number in container.get_list_of_spectra(only_spectral=True):
                record = container.get_spectrum(number)
    """

    path: pathlib.Path
    codec: ByteCodec
    next_free_block: int
    ilex: int
    imex: int
    next_free_entry: int
    primary_index: list[int]

    def __init__(self, path: pathlib.Path | str):
        self.path = pathlib.Path(path)
        self._file: typing.BinaryIO | None = open(self.path, "rb")
        self._size = self.path.stat().st_size
        self._state: Unindexed | Indexed = Unindexed()
        try:
            self._read_preamble()
        except BaseException:
            self.close()
            raise

    def _read_preamble(self):
        preamble = self._read(0, PREAMBLE_SIZE)
        self.code = preamble[:4].decode("latin-1")
        self.codec = get_codec(self.code)
        self.next_free_block = self.codec.read_i32(preamble, 4)
        self.ilex = self.codec.read_i32(preamble, 8)
        self.imex = self.codec.read_i32(preamble, 12)
        self.next_free_entry = self.codec.read_i32(preamble, 16)
        self.primary_index = [
            self.codec.read_i32(preamble, 20 + 4 * i)
            for i in range(PRIMARY_INDEX_LENGTH)
        ]

    def __enter__(self) -> "SpectrumContainer":
        return self

    def __exit__(self, *args):
        self.close()

    def close(self):
        if self._file is not None:
            self._file.close()
            self._file = None

    @property
    def closed(self) -> bool:
        return self._file is None

    def _read(self, offset: int, size: int, entry: int | None = None) -> bytes:
        if self._file is None:
            raise ValueError(f"I/O operation on closed container {self.path}.")
        if offset < 0 or offset + size > self._size:
            raise CorruptOffset(offset, entry=entry, size=self._size)
        self._file.seek(offset)
        return self._file.read(size)

    def _entry_offset(self, i: int) -> int:
        j = i // self.ilex
        if j >= len(self.primary_index):
            raise CorruptOffset(j, entry=i, size=len(self.primary_index))
        k = (i - j * self.ilex) // 4
        block = self.primary_index[j] + k - 1
        return block * BLOCK_SIZE + (i - k * 4 - j * self.ilex) * ENTRY_SIZE

    def read_entry(self, i: int) -> SpectrumHeader:
        return parse_entry(self.codec, self._read(self._entry_offset(i), ENTRY_SIZE, i))

    def create_index(self, limit: int | None = None) -> Indexed:
        """Read the index entries and map observation numbers to them.

        Args:
            limit (int | None, optional): Read at most `limit - 1` entries. When
                omitted or not positive, the next-free-entry of the preamble is
                used. Defaults to None.

        Raises:
            CorruptOffset: An entry lies past the end of the file.

        Returns:
            Indexed: The new index, also kept by the container.
        """
        if limit is None or limit <= 0:
            limit = self.next_free_entry
        entries = sortedcontainers.SortedDict()
        file_order: list[int] = []
        for i in range(limit - 1):
            header = self.read_entry(i)
            if header.num in entries:
                loguru.logger.warning(
                    f"Observation {header.num} appears again at entry {i}, keeping the first one."
                )
                continue
            loguru.logger.debug(
                f"Entry {i}: observation {header.num} at block {header.block}."
            )
            entries[header.num] = header
            file_order.append(header.num)
        self._state = Indexed(entries, file_order)
        return self._state

    def recover_damaged_file(self, limit: int) -> Indexed:
        """Rebuild the index from at most `limit - 1` entries, keeping those read
        before the first one that is out of the file."""
        entries = sortedcontainers.SortedDict()
        file_order: list[int] = []
        for i in range(max(limit - 1, 0)):
            try:
                header = self.read_entry(i)
            except CorruptOffset as e:
                loguru.logger.warning(f"Stopped recovery at entry {i}: {e}")
                break
            if header.num in entries:
                continue
            entries[header.num] = header
            file_order.append(header.num)
        self._state = Indexed(entries, file_order)
        return self._state

    @property
    def index(self) -> Indexed:
        if isinstance(self._state, Unindexed):
            return self.create_index()
        return self._state

    def __len__(self) -> int:
        return len(self.index.entries)

    def __contains__(self, observation_number: int) -> bool:
        return observation_number in self.index.entries

    def header(self, observation_number: int) -> SpectrumHeader | None:
        return self.index.entries.get(observation_number)

    def get_list_of_spectra(self, only_spectral: bool = False) -> list[int]:
        """Observation numbers in file order."""
        entries = self.index.entries
        return [
            number
            for number in self.index.file_order
            if not only_spectral or entries[number].kind == DataKind.SPECTRAL
        ]

    def get_spectrum(self, observation_number: int) -> SpectrumRecord | None:
        header = self.header(observation_number)
        if header is None:
            loguru.logger.warning(
                f"Observation {observation_number} is not in {self.path}."
            )
            return None
        return self._read_record(header)

    def get_spectrum_at(self, logical_index: int) -> SpectrumRecord:
        """The spectrum with the `logical_index`-th smallest observation number."""
        entries = self.index.entries
        if not -len(entries) <= logical_index < len(entries):
            raise IndexError(
                f"Logical index {logical_index} out of range for {len(entries)} spectra."
            )
        return self._read_record(entries.peekitem(logical_index)[1])

    def spectra(self, only_spectral: bool = False) -> typing.Iterator[SpectrumRecord]:
        for number in self.get_list_of_spectra(only_spectral):
            yield self._read_record(self.index.entries[number])

    def listing(self, only_spectral: bool = False) -> pandas.DataFrame:
        rows = []
        for number in self.get_list_of_spectra(only_spectral):
            visible = self.index.entries[number].visible()
            rows.append({parameter.key: parameter.value for parameter in visible})
        columns = [parameter.key for parameter in SpectrumHeader().visible()]
        return pandas.DataFrame(rows, columns=columns)

    def _read_blocks(self, block: int, entry: int) -> bytes:
        offset = (block - 1) * BLOCK_SIZE
        first = self._read(offset, BLOCK_SIZE, entry)
        nblocks = self.codec.read_i32(first, 4)
        if nblocks <= 1:
            return first
        return first + self._read(
            offset + BLOCK_SIZE, BLOCK_SIZE * (nblocks - 1), entry
        )

    def _read_record(self, header: SpectrumHeader) -> SpectrumRecord:
        buffer = self._read_blocks(header.block, header.num)
        codec = self.codec
        try:
            address = codec.read_i32(buffer, 16)
            nchan = codec.read_i32(buffer, 20)
            data = codec.read_f32_array(buffer, (address - 1) * 4, nchan)
            parameters = self._read_sections(buffer)
        except CorruptOffset as e:
            raise CorruptOffset(
                (header.block - 1) * BLOCK_SIZE + e.offset,
                entry=header.num,
                size=self._size,
            ) from e

        parameters.setdefault(str(K.TELES), Parameter.for_key(K.TELES, header.teles))
        declared = parameters.get(str(K.NCHAN))
        if declared is not None and declared.as_int() != nchan:
            loguru.logger.warning(
                f"Observation {header.num} declares {declared.as_int()} channels but stores {nchan}."
            )
        parameters[str(K.NCHAN)] = Parameter.for_key(K.NCHAN, nchan)
        return SpectrumRecord(header, data, parameters)

    def _read_sections(self, buffer: bytes) -> dict[str, Parameter]:
        codec = self.codec
        nsec = codec.read_i32(buffer, 28)
        parameters: dict[str, Parameter] = dict()
        for k in range(nsec):
            section_id = codec.read_i32(buffer, 36 + 4 * k)
            length = codec.read_i32(buffer, 36 + 4 * nsec + 4 * k)
            address = codec.read_i32(buffer, 36 + 8 * nsec + 4 * k)
            parser = SECTION_PARSERS.get(section_id)
            if parser is None:
                loguru.logger.debug(f"Skipping unknown section {section_id}.")
                continue
            parameters.update(parser(codec, buffer, (address - 1) * 4, length))
        return parameters


def _data_blocks(nchan: int) -> int:
    return math.ceil(nchan * 4 / BLOCK_SIZE)


def _section_value(record: SpectrumRecord, key: str, kind: str):
    if str(key) == str(K.NCHAN):
        return record.nchan
    parameter = record.get(key)
    if parameter is not None:
        return parameter.value
    if kind == "str":
        fallback = {
            str(K.SOURCE): record.header.source,
            str(K.LINE): record.header.line,
        }
        return fallback.get(str(key), "")
    return 0


def encode_observation(
    codec: ByteCodec, record: SpectrumRecord, position: int
) -> bytearray:
    """Encode one observation: record header, five sections and the data."""
    nchan = record.nchan
    nblocks = _data_blocks(nchan) + 2
    buffer = bytearray(nblocks * BLOCK_SIZE)
    buffer[0:4] = b"2   "
    codec.write_i32(buffer, 4, nblocks)
    codec.write_i32(buffer, 8, DATA_ADDRESS + nchan - 1)
    codec.write_i32(buffer, 12, 0)
    codec.write_i32(buffer, 16, DATA_ADDRESS)
    codec.write_i32(buffer, 20, nchan)
    codec.write_i32(buffer, 24, 0)
    codec.write_i32(buffer, 28, len(WRITTEN_SECTIONS))
    codec.write_i32(buffer, 32, position + 1)

    nsec = len(WRITTEN_SECTIONS)
    address = SECTION_ADDRESS
    for k, (section_id, layout, length) in enumerate(WRITTEN_SECTIONS):
        codec.write_i32(buffer, 36 + 4 * k, section_id)
        codec.write_i32(buffer, 36 + 4 * nsec + 4 * k, length)
        codec.write_i32(buffer, 36 + 8 * nsec + 4 * k, address)
        base = (address - 1) * 4
        for key, kind, offset in layout:
            value = _section_value(record, key, kind)
            codec.write_field(kind, buffer, base + offset, value)
        address += length

    codec.write_f32_array(buffer, (DATA_ADDRESS - 1) * 4, record.data)
    return buffer


def write_container(
    path: pathlib.Path | str,
    records: typing.Sequence[SpectrumRecord],
    codec: ByteCodec | None = None,
):
    """Write `records` as a CLASS 30m container.

    Args:
        path (pathlib.Path | str): Output file, overwritten if it exists.
        records (typing.Sequence[SpectrumRecord]): Observations in file order.
        codec (ByteCodec | None, optional): Byte order of the output. Defaults to
            `NativeOrderCodec`.
    """
    if codec is None:
        codec = NativeOrderCodec()
    ns = len(records)
    additional = 0
    if ns > MAX_ENTRIES_BEFORE_DATA:
        additional = math.ceil((ns - MAX_ENTRIES_BEFORE_DATA) / 4)
    first_block = FIRST_DATA_BLOCK + additional
    blocks = [first_block]
    for record in records:
        blocks.append(blocks[-1] + _data_blocks(record.nchan) + 2)

    preamble = bytearray(PREAMBLE_SIZE)
    preamble[0:4] = codec.code.encode("latin-1")
    codec.write_i32(preamble, 4, blocks[-1])
    codec.write_i32(preamble, 8, ns)
    codec.write_i32(preamble, 12, 1)
    codec.write_i32(preamble, 16, ns + 1)
    for i in range(PRIMARY_INDEX_LENGTH):
        codec.write_i32(preamble, 20 + 4 * i, PRIMARY_INDEX_FILL)

    index = bytearray()
    for record, block in zip(records, blocks):
        index += encode_entry(codec, record.header, block)
    index_blocks = math.ceil(ns / 4)
    index += bytes(index_blocks * BLOCK_SIZE - len(index))
    # preamble and index blocks, then zeros up to the first data block
    padding = (first_block - 1 - 2 - index_blocks) * BLOCK_SIZE

    with open(path, "wb") as fout:
        fout.write(preamble)
        fout.write(index)
        fout.write(bytes(padding))
        for position, record in enumerate(records):
            fout.write(encode_observation(codec, record, position))
