import copy
import dataclasses
import enum
import math
import pathlib
import typing

import astropy.io.fits  # type: ignore
import astropy.units  # type: ignore
import astropy.wcs  # type: ignore
import loguru
import numpy
import numpy.typing
import scipy.interpolate  # type: ignore
import scipy.ndimage  # type: ignore

from .codec import ByteCodec, SwappedOrderCodec, get_image_codec
from .errors import ChannelRangeError, CorruptOffset, FormatError
from .kernel import Kernel
from .logging import WarningBudget
from .spectrum import Spectrum, SpectrumMetadata, XUnit
from .spectrum_record import SpectrumRecord
from .utils import ARCSEC_TO_RAD

__all__ = [
    "CubeFile",
    "CubeHeader",
    "CubeProjection",
    "CubeRecord",
    "FileBacked",
    "Materialized",
    "add_cubes",
    "convolve_map",
]

MAGIC_PREFIX = "GILDAS"
MAGIC_SUFFIX = "IMAGE"
HEADER_SIZE = 512
IMAGE_FORMAT = -11
TRAILING_WORDS = 1920

FIELD_SIZES = {"i32": 4, "f32": 4, "f64": 8, "str": 12}

# (attribute, type, byte offset)
HEADER_LAYOUT: list[tuple[str, str, int]] = [
    ("image_format", "i32", 12),
    ("nblocks", "i32", 16),
    ("naxis", "i32", 44),
    ("blanking", "f32", 164),
    ("tolerance", "f32", 168),
    ("minimum", "f32", 176),
    ("maximum", "f32", 180),
    ("unit", "str", 220),
    ("coordinate_system", "str", 280),
    ("source", "str", 296),
    ("ra", "f64", 308),
    ("dec", "f64", 316),
    ("glon", "f64", 324),
    ("glat", "f64", 332),
    ("epoch", "f32", 340),
    ("projection", "i32", 348),
    ("axis1_position", "f64", 352),
    ("axis2_position", "f64", 360),
    ("position_angle", "f64", 368),
    ("x_axis", "i32", 376),
    ("y_axis", "i32", 380),
    ("line", "str", 388),
    ("frequency_resolution", "f64", 400),
    ("image_frequency", "f64", 408),
    ("rest_frequency", "f64", 416),
    ("velocity_resolution", "f32", 424),
    ("velocity_offset", "f32", 428),
    ("z_axis", "i32", 432),
    ("beam_major", "f32", 440),
    ("beam_minor", "f32", 444),
    ("beam_pa", "f32", 448),
    ("noise", "f32", 456),
    ("rms", "f32", 460),
    ("proper_motion_ra", "f32", 468),
    ("proper_motion_dec", "f32", 472),
    ("parallax", "f32", 476),
]

# (attribute, type, byte offset, count)
ARRAY_LAYOUT: list[tuple[str, str, int, int]] = [
    ("dims", "i32", 48, 4),
    ("formula", "f64", 64, 12),
    ("extrema_positions", "i32", 184, 8),
    ("axis_labels", "str", 232, 4),
]

# (byte offset, length in bytes) of the section length words
SECTION_LENGTHS: list[tuple[int, int]] = [
    (40, 116),
    (160, 8),
    (172, 40),
    (216, 72),
    (292, 48),
    (344, 36),
    (384, 48),
    (436, 12),
    (452, 8),
    (464, 12),
]


class CubeProjection(enum.IntEnum):
    UNKNOWN = 0
    TAN = 1
    SIN = 2
    AZP = 3
    STG = 4
    UNKNOWN2 = 5
    AIT = 6
    GLS = 7

    @property
    def wcs_code(self) -> str | None:
        if self in (CubeProjection.UNKNOWN, CubeProjection.UNKNOWN2):
            return None
        if self is CubeProjection.GLS:
            return "SFL"
        return self.name

    @classmethod
    def from_wcs_code(cls, code: str) -> "CubeProjection":
        if code == "SFL":
            return cls.GLS
        try:
            return cls[code]
        except KeyError:
            loguru.logger.warning(f"Unsupported projection {code = }.")
            return cls.UNKNOWN


def _celestial_axes(coordinate_system: str) -> tuple[str, str]:
    system = coordinate_system.strip().upper()
    if system.startswith("GALACTIC"):
        return "GLON", "GLAT"
    if system.startswith("ECLIPTIC"):
        return "ELON", "ELAT"
    return "RA", "DEC"


@dataclasses.dataclass
class CubeHeader:
    """The fixed 512-byte header of an LMV cube.

    Angles (offsets, axis positions, beam sizes, source position) are in
    radians, the beam position angle in degrees, frequencies in MHz and
    velocities in km/s. `formula` holds (reference pixel, value at reference
    pixel, increment) for each axis; pixels are 1-based.
    """

    image_format: int = IMAGE_FORMAT
    nblocks: int = 0
    naxis: int = 3
    dims: list[int] = dataclasses.field(default_factory=lambda: [1, 1, 1, 1])
    formula: list[float] = dataclasses.field(
        default_factory=lambda: [1.0, 0.0, 1.0] * 3 + [0.0] * 3
    )
    blanking: float = -1000.0
    tolerance: float = 0.0
    minimum: float = 0.0
    maximum: float = 0.0
    extrema_positions: list[int] = dataclasses.field(default_factory=lambda: [0] * 8)
    unit: str = "K"
    axis_labels: list[str] = dataclasses.field(
        default_factory=lambda: ["RA", "DEC", "VELOCITY", ""]
    )
    coordinate_system: str = "EQUATORIAL"
    source: str = ""
    ra: float = 0.0
    dec: float = 0.0
    glon: float = 0.0
    glat: float = 0.0
    epoch: float = 2000.0
    projection: int = int(CubeProjection.TAN)
    axis1_position: float = 0.0
    axis2_position: float = 0.0
    position_angle: float = 0.0
    x_axis: int = 1
    y_axis: int = 2
    line: str = ""
    frequency_resolution: float = 0.0
    image_frequency: float = 0.0
    rest_frequency: float = 0.0
    velocity_resolution: float = 0.0
    velocity_offset: float = 0.0
    z_axis: int = 3
    beam_major: float = 0.0
    beam_minor: float = 0.0
    beam_pa: float = 0.0
    noise: float = 0.0
    rms: float = 0.0
    proper_motion_ra: float = 0.0
    proper_motion_dec: float = 0.0
    parallax: float = 0.0

    @property
    def nx(self) -> int:
        return self.dims[0]

    @property
    def ny(self) -> int:
        return self.dims[1]

    @property
    def nz(self) -> int:
        return self.dims[2]

    @classmethod
    def from_bytes(cls, codec: ByteCodec, buffer: bytes) -> "CubeHeader":
        values: dict[str, typing.Any] = {}
        for name, kind, offset in HEADER_LAYOUT:
            values[name] = codec.read_field(kind, buffer, offset)
        for name, kind, offset, count in ARRAY_LAYOUT:
            size = FIELD_SIZES[kind]
            values[name] = [
                codec.read_field(kind, buffer, offset + i * size) for i in range(count)
            ]
        return cls(**values)

    def to_bytes(self, codec: ByteCodec) -> bytearray:
        buffer = bytearray(HEADER_SIZE)
        magic = f"{MAGIC_PREFIX}{codec.image_code}{MAGIC_SUFFIX}"
        buffer[: len(magic)] = magic.encode("latin-1")
        for offset, length in SECTION_LENGTHS:
            codec.write_i32(buffer, offset, length)
        for name, kind, offset in HEADER_LAYOUT:
            codec.write_field(kind, buffer, offset, getattr(self, name))
        for name, kind, offset, count in ARRAY_LAYOUT:
            size = FIELD_SIZES[kind]
            values = getattr(self, name)
            for i in range(count):
                codec.write_field(kind, buffer, offset + i * size, values[i])
        return buffer


class CubeFile:
    """Open handle on an LMV cube file.

    The header is parsed on open; planes are read on demand.

    Example:
        with CubeFile("map.lmv") as cube_file:
            first = cube_file.read_plane(0)
    """

    path: pathlib.Path
    codec: ByteCodec
    header: CubeHeader

    def __init__(self, path: pathlib.Path | str):
        self.path = pathlib.Path(path)
        self._file: typing.BinaryIO | None = open(self.path, "rb")
        self._size = self.path.stat().st_size
        try:
            self._read_header()
        except BaseException:
            self.close()
            raise

    def _read_header(self):
        buffer = self._read(0, HEADER_SIZE)
        magic = buffer[:12].decode("latin-1")
        if magic[:6] != MAGIC_PREFIX or magic[7:12] != MAGIC_SUFFIX:
            raise FormatError(f"{self.path} is not a GILDAS image ({magic = !r}).")
        self.codec = get_image_codec(magic[6])
        self.header = CubeHeader.from_bytes(self.codec, buffer)
        loguru.logger.debug(
            f"Opened cube {self.path} with dims {self.header.dims} ({self.codec})."
        )

    def __enter__(self) -> "CubeFile":
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

    def _read(self, offset: int, size: int) -> bytes:
        if self._file is None:
            raise ValueError(f"I/O operation on closed cube {self.path}.")
        if offset < 0 or offset + size > self._size:
            raise CorruptOffset(offset, size=self._size)
        self._file.seek(offset)
        return self._file.read(size)

    @property
    def plane_size(self) -> int:
        return 4 * self.header.nx * self.header.ny

    def read_plane(self, k: int) -> numpy.typing.NDArray[numpy.float32]:
        """Raw plane `k` (0-based), shaped (ny, nx)."""
        header = self.header
        if not 0 <= k < header.nz:
            raise ChannelRangeError(f"Plane {k} does not exist (0-{header.nz - 1}).")
        buffer = self._read(HEADER_SIZE + k * self.plane_size, self.plane_size)
        values = self.codec.read_f32_array(buffer, 0, header.nx * header.ny)
        return values.reshape(header.ny, header.nx)

    def planes(
        self, start: int = 0, stop: int | None = None
    ) -> typing.Iterator[numpy.typing.NDArray[numpy.float32]]:
        stop = self.header.nz if stop is None else stop
        for k in range(start, stop):
            yield self.read_plane(k)

    def read_volume(self) -> numpy.typing.NDArray[numpy.float32]:
        header = self.header
        count = header.nx * header.ny * header.nz
        buffer = self._read(HEADER_SIZE, 4 * count)
        values = self.codec.read_f32_array(buffer, 0, count)
        return values.reshape(header.nz, header.ny, header.nx)

    def record(self) -> "CubeRecord":
        return CubeRecord(copy.deepcopy(self.header), FileBacked(self.path), self.codec)


@dataclasses.dataclass(frozen=True)
class FileBacked:
    path: pathlib.Path


@dataclasses.dataclass
class Materialized:
    volume: numpy.typing.NDArray[numpy.float32]


def convolve_map(
    volume: numpy.typing.NDArray[numpy.floating],
    kernel: Kernel,
    x: int,
    y: int,
    outside_value: float = 0.0,
    fix_nan: bool = True,
    budget: WarningBudget | None = None,
    valid: numpy.typing.NDArray[numpy.bool_] | None = None,
) -> numpy.typing.NDArray[numpy.float64]:
    """Normalized kernel-weighted spectrum at pixel (x, y).

    Args:
        volume (NDArray): Data ordered (plane, y, x).
        kernel (Kernel): Weights centred on (x, y).
        x (int): Column of the convolved pixel.
        y (int): Row of the convolved pixel.
        outside_value (float, optional): Intensity assumed outside the map.
            A negative value leaves outside pixels out of the sum and of the
            normalization. Defaults to 0.0.
        fix_nan (bool, optional): When False, channels where the pixel itself
            is NaN or infinite stay NaN. Defaults to True.
        budget (WarningBudget | None, optional): Receives a warning when
            non-finite samples are skipped.
        valid (NDArray | None, optional): Same shape as `volume`; samples that
            are False, such as blanked ones, carry no weight.

    Returns:
        NDArray: One value per plane.
    """
    nz, ny, nx = volume.shape
    if not (0 <= x < nx and 0 <= y < ny):
        raise IndexError(f"Pixel ({x}, {y}) is outside a {nx}x{ny} map.")
    ys = numpy.arange(y - kernel.half_height, y + kernel.half_height + 1)
    xs = numpy.arange(x - kernel.half_width, x + kernel.half_width + 1)
    weights = kernel.weights
    inside = ((ys >= 0) & (ys < ny))[:, None] & ((xs >= 0) & (xs < nx))[None, :]
    used = weights != 0.0

    rows, columns = numpy.nonzero(inside & used)
    w = weights[rows, columns]
    values = volume[:, ys[rows], xs[columns]].astype(numpy.float64)
    finite = numpy.isfinite(values)
    if budget is not None and not finite.all():
        budget.warn(
            f"{numpy.count_nonzero(~finite)} infinite or NaN samples skipped "
            f"around position {x} {y}."
        )
    if valid is not None:
        finite = finite & valid[:, ys[rows], xs[columns]]
    total = numpy.where(finite, values * w, 0.0).sum(axis=1)
    norm = numpy.where(finite, w, 0.0).sum(axis=1)
    if outside_value >= 0:
        outside_weight = weights[~inside & used].sum()
        total += outside_value * outside_weight
        norm += outside_weight

    with numpy.errstate(divide="ignore", invalid="ignore"):
        result = total / norm
    if not fix_nan:
        result[~numpy.isfinite(volume[:, y, x])] = numpy.nan
    return result


def add_cubes(
    a: numpy.typing.ArrayLike, b: numpy.typing.ArrayLike, fix_nan: bool = False
) -> numpy.typing.NDArray[numpy.float32]:
    """Cell-by-cell sum. With `fix_nan` a non-finite cell counts as 0 unless it
    is non-finite in both inputs, which always gives NaN."""
    a = numpy.asarray(a, dtype=numpy.float32)
    b = numpy.asarray(b, dtype=numpy.float32)
    if a.shape != b.shape:
        raise ValueError(f"Cannot add cubes of shapes {a.shape} and {b.shape}.")
    bad_a = ~numpy.isfinite(a)
    bad_b = ~numpy.isfinite(b)
    if fix_nan:
        a = numpy.where(bad_a, 0.0, a)
        b = numpy.where(bad_b, 0.0, b)
    out = (a + b).astype(numpy.float32)
    out[bad_a & bad_b] = numpy.nan
    return out


def _reduction(dim: int, maximum: int) -> int:
    if maximum < 1:
        raise ValueError(f"Maximum size must be positive, got {maximum}.")
    if maximum >= dim:
        return 1
    return -(-dim // maximum)


def _fraction(value, start: float, stop: float):
    if stop == start:
        return value * 0.0
    return (value - start) / (stop - start)


class CubeRecord:
    """A GILDAS LMV data cube.

    The volume is ordered (plane, y, x). A record read from disk starts
    file-backed and reads planes on demand; any operation that changes the
    data materializes it in memory. `reset_to_file()` goes back to the file.
    """

    header: CubeHeader
    codec: ByteCodec
    path: pathlib.Path | None
    wcs: astropy.wcs.WCS

    def __init__(
        self,
        header: CubeHeader,
        state: FileBacked | Materialized,
        codec: ByteCodec | None = None,
    ):
        self.header = header
        self.codec = SwappedOrderCodec() if codec is None else codec
        self.path = state.path if isinstance(state, FileBacked) else None
        if isinstance(state, Materialized):
            shape = (header.nz, header.ny, header.nx)
            if state.volume.shape != shape:
                raise ValueError(
                    f"Volume of shape {state.volume.shape} does not match header {shape}."
                )
        self._state = state
        self._update_wcs()

    @classmethod
    def read(cls, path: pathlib.Path | str) -> "CubeRecord":
        with CubeFile(path) as cube_file:
            return cube_file.record()

    @classmethod
    def from_volume(
        cls,
        volume: numpy.typing.ArrayLike,
        formula: typing.Sequence[float] | None = None,
        **fields,
    ) -> "CubeRecord":
        """Build a materialized cube; `fields` are `CubeHeader` attributes."""
        volume = numpy.array(volume, dtype=numpy.float32)
        if volume.ndim != 3:
            raise ValueError(f"A cube needs three dimensions, got {volume.ndim}.")
        header = CubeHeader(**fields)
        nz, ny, nx = volume.shape
        header.dims = [nx, ny, nz, 1]
        header.naxis = 3
        if formula is not None:
            header.formula = [float(value) for value in formula]
            header.formula += [0.0] * (12 - len(header.formula))
        record = cls(header, Materialized(volume))
        record._update_extrema()
        return record

    def __repr__(self) -> str:
        state = "materialized" if self.is_materialized else f"file-backed {self.path}"
        return (
            f"CubeRecord(source={self.header.source!r}, line={self.header.line!r}, "
            f"dims={self.header.dims[:3]}, {state})"
        )

    @property
    def state(self) -> FileBacked | Materialized:
        return self._state

    @property
    def is_materialized(self) -> bool:
        return isinstance(self._state, Materialized)

    @property
    def nx(self) -> int:
        return self.header.nx

    @property
    def ny(self) -> int:
        return self.header.ny

    @property
    def nz(self) -> int:
        return self.header.nz

    @property
    def formula(self) -> list[float]:
        return self.header.formula

    @property
    def rest_frequency(self) -> float:
        return self.header.rest_frequency

    @property
    def velocity_resolution(self) -> float:
        if self.header.velocity_resolution != 0:
            return self.header.velocity_resolution
        return self.formula[8]

    @property
    def spatial_resolution(self) -> float:
        """Pixel size along x in arcsec."""
        return abs(self.formula[2]) / ARCSEC_TO_RAD

    # Offsets (radians) and velocities (km/s) of the first and last pixels.

    @property
    def x0(self) -> float:
        f = self.formula
        return f[1] + (1.0 - f[0]) * f[2]

    @property
    def xf(self) -> float:
        f = self.formula
        return f[1] + (self.nx - f[0]) * f[2]

    @property
    def y0(self) -> float:
        f = self.formula
        return f[4] + (1.0 - f[3]) * f[5]

    @property
    def yf(self) -> float:
        f = self.formula
        return f[4] + (self.ny - f[3]) * f[5]

    @property
    def v0(self) -> float:
        f = self.formula
        return f[7] + (1.0 - f[6]) * f[8]

    @property
    def vf(self) -> float:
        f = self.formula
        return f[7] + (self.nz - f[6]) * f[8]

    def position_from_offset(self, offset_x, offset_y):
        """0-based (x, y) pixel position of an offset from the map centre, in
        radians on the sky."""
        px = (self.nx - 1.0) * _fraction(offset_x, self.x0, self.xf)
        py = (self.ny - 1.0) * _fraction(offset_y, self.y0, self.yf)
        return px, py

    def offset_from_position(self, px, py):
        dx = px / (self.nx - 1.0) if self.nx > 1 else px * 0.0
        dy = py / (self.ny - 1.0) if self.ny > 1 else py * 0.0
        return (
            self.x0 + dx * (self.xf - self.x0),
            self.y0 + dy * (self.yf - self.y0),
        )

    def _blanked(self, values: numpy.typing.NDArray) -> numpy.typing.NDArray[numpy.bool_]:
        tolerance = max(self.header.tolerance, 0.0)
        return numpy.abs(values - self.header.blanking) <= tolerance

    def _apply_blanking(self, values: numpy.typing.NDArray) -> numpy.typing.NDArray:
        values = numpy.array(values, dtype=numpy.float32)
        values[self._blanked(values)] = 0.0
        return values

    def _check_plane(self, k: int):
        if not 0 <= k < self.nz:
            raise ChannelRangeError(f"Plane {k} does not exist (0-{self.nz - 1}).")

    def _raw_volume(self) -> numpy.typing.NDArray[numpy.float32]:
        if isinstance(self._state, Materialized):
            return self._state.volume
        with CubeFile(self._state.path) as cube_file:
            return cube_file.read_volume()

    def _planes(
        self, start: int = 0, stop: int | None = None, apply_blanking: bool = True
    ) -> typing.Iterator[numpy.typing.NDArray[numpy.float32]]:
        stop = self.nz if stop is None else stop
        if isinstance(self._state, Materialized):
            planes: typing.Iterable = self._state.volume[start:stop]
            for plane in planes:
                yield self._apply_blanking(plane) if apply_blanking else plane
            return
        with CubeFile(self._state.path) as cube_file:
            for plane in cube_file.planes(start, stop):
                yield self._apply_blanking(plane) if apply_blanking else plane

    def volume(self, apply_blanking: bool = True) -> numpy.typing.NDArray[numpy.float32]:
        """Copy of the data, with blanked samples set to 0 when `apply_blanking`."""
        volume = self._raw_volume()
        if apply_blanking:
            return self._apply_blanking(volume)
        return volume.copy()

    def plane(self, k: int, apply_blanking: bool = True) -> numpy.typing.NDArray[numpy.float32]:
        self._check_plane(k)
        if isinstance(self._state, Materialized):
            plane = self._state.volume[k]
        else:
            with CubeFile(self._state.path) as cube_file:
                plane = cube_file.read_plane(k)
        if apply_blanking:
            return self._apply_blanking(plane)
        return plane.copy()

    def materialize(self) -> numpy.typing.NDArray[numpy.float32]:
        """Load the data in memory and return the stored (mutable) array."""
        if isinstance(self._state, FileBacked):
            self._state = Materialized(numpy.array(self._raw_volume()))
        return self._state.volume

    def reset_to_file(self):
        if self.path is None:
            raise ValueError("This cube was not read from a file.")
        with CubeFile(self.path) as cube_file:
            self.header = copy.deepcopy(cube_file.header)
            self.codec = cube_file.codec
        self._state = FileBacked(self.path)
        self._update_wcs()

    def _update_extrema(self):
        volume = self._raw_volume()
        header = self.header
        valid = ~self._blanked(volume) & numpy.isfinite(volume)
        if not numpy.any(valid):
            header.minimum = header.maximum = 0.0
            header.extrema_positions = [0] * 8
            return
        kmin = numpy.argmin(numpy.where(valid, volume, numpy.inf))
        kmax = numpy.argmax(numpy.where(valid, volume, -numpy.inf))
        zmin, ymin, xmin = numpy.unravel_index(kmin, volume.shape)
        zmax, ymax, xmax = numpy.unravel_index(kmax, volume.shape)
        header.minimum = float(volume[zmin, ymin, xmin])
        header.maximum = float(volume[zmax, ymax, xmax])
        header.extrema_positions = [
            int(xmin) + 1,
            int(xmax) + 1,
            int(ymin) + 1,
            int(ymax) + 1,
            int(zmin) + 1,
            int(zmax) + 1,
            1,
            1,
        ]

    def _update_wcs(self):
        header = self.header
        f = header.formula
        try:
            code = CubeProjection(header.projection).wcs_code
        except ValueError:
            code = None
        if code is None:
            loguru.logger.warning(
                f"Unknown projection type {header.projection}. Value forced to TAN projection."
            )
            code = "TAN"
        lon, lat = _celestial_axes(header.coordinate_system)

        wcs = astropy.wcs.WCS(naxis=3)
        wcs.wcs.ctype = [f"{lon:-<4}-{code}", f"{lat:-<4}-{code}", "VRAD"]
        wcs.wcs.cunit = ["deg", "deg", "m/s"]
        crpix = [
            f[0] - f[1] / f[2] if f[2] != 0 else f[0],
            f[3] - f[4] / f[5] if f[5] != 0 else f[3],
            f[6],
        ]
        wcs.wcs.crpix = crpix
        wcs.wcs.crval = [
            math.degrees(header.axis1_position),
            math.degrees(header.axis2_position),
            f[7] * 1.0e3,
        ]
        wcs.wcs.cdelt = [
            math.degrees(f[2]) or 1.0,
            math.degrees(f[5]) or 1.0,
            f[8] * 1.0e3 or 1.0,
        ]
        if header.rest_frequency > 0:
            wcs.wcs.restfrq = header.rest_frequency * 1.0e6
        if lon == "RA" and header.epoch > 0:
            wcs.wcs.equinox = header.epoch
        wcs.pixel_shape = (header.nx, header.ny, header.nz)
        self.wcs = wcs

    def _rebin_block(
        self, block: numpy.typing.NDArray[numpy.float32], r1: int, r2: int
    ) -> numpy.typing.NDArray[numpy.float32]:
        depth, ny, nx = block.shape
        n2, n1 = ny // r2, nx // r1
        block = block[:, : n2 * r2, : n1 * r1].astype(numpy.float64)
        valid = ~self._blanked(block)
        cells = (depth, n2, r2, n1, r1)
        sums = numpy.where(valid, block, 0.0).reshape(cells).sum(axis=(0, 2, 4))
        counts = valid.reshape(cells).sum(axis=(0, 2, 4))
        out = numpy.full((n2, n1), self.header.blanking, dtype=numpy.float64)
        numpy.divide(sums, counts, out=out, where=counts > 0)
        return out.astype(numpy.float32)

    def rebinned(
        self, max1: int, max2: int, max3: int
    ) -> numpy.typing.NDArray[numpy.float32]:
        """Average the cube down to at most max1 x max2 x max3 pixels.

        Each axis is reduced by the smallest integer factor that brings it
        under its maximum. Blanked samples do not contribute; a cell without
        contributors is blanked. The cube itself is left untouched.
        """
        r1 = _reduction(self.nx, max1)
        r2 = _reduction(self.ny, max2)
        r3 = _reduction(self.nz, max3)
        n3 = self.nz // r3
        out = numpy.empty((n3, self.ny // r2, self.nx // r1), dtype=numpy.float32)
        block: list[numpy.typing.NDArray[numpy.float32]] = []
        k = 0
        for plane in self._planes(0, n3 * r3, apply_blanking=False):
            block.append(plane)
            if len(block) == r3:
                out[k] = self._rebin_block(numpy.stack(block), r1, r2)
                block = []
                k += 1
        return out

    def smooth(self, max1: int, max2: int, max3: int):
        self.set_volume(self.rebinned(max1, max2, max3))

    def set_volume(self, volume: numpy.typing.ArrayLike):
        """Replace the data, rescaling the axes to the new dimensions.

        Resolutions, noise, rms and the conversion formula are scaled by the
        ratio between the old and the new size of each axis.
        """
        volume = numpy.array(volume, dtype=numpy.float32)
        if volume.ndim != 3:
            raise ValueError(f"A cube needs three dimensions, got {volume.ndim}.")
        header = self.header
        nz, ny, nx = volume.shape
        ratios = (self.nx / nx, self.ny / ny, self.nz / nz)
        product = ratios[0] * ratios[1] * ratios[2]

        header.velocity_resolution *= ratios[2]
        header.frequency_resolution *= ratios[2]
        header.noise = math.sqrt(header.noise * header.noise / product)
        header.rms = math.sqrt(header.rms * header.rms / product)
        header.dims[:3] = [nx, ny, nz]
        f = header.formula
        for axis, ratio in enumerate(ratios):
            f[3 * axis] = f[3 * axis] / ratio + (ratio - 1.0) / (2.0 * ratio)
            f[3 * axis + 2] *= ratio

        self._state = Materialized(volume)
        self._update_extrema()
        self._update_wcs()

    def resample(
        self,
        width: int,
        height: int,
        nchan: int | None = None,
        spline: bool = True,
        raw: bool = False,
    ):
        """Resize every plane to width x height with a cubic spline.

        With `nchan` the velocity axis of each pixel is resampled as well, by
        cubic spline or linearly. Blanked samples count as 0 unless `raw`.
        """
        volume = self.volume(apply_blanking=not raw).astype(numpy.float64)
        ys = numpy.linspace(0.0, self.ny - 1.0, height)
        xs = numpy.linspace(0.0, self.nx - 1.0, width)
        grid = numpy.meshgrid(ys, xs, indexing="ij")
        out = numpy.stack(
            [
                scipy.ndimage.map_coordinates(plane, grid, order=3, mode="nearest")
                for plane in volume
            ]
        )
        if nchan is not None and nchan != self.nz:
            channels = numpy.arange(self.nz, dtype=numpy.float64)
            targets = numpy.linspace(0.0, self.nz - 1.0, nchan)
            if spline:
                out = scipy.interpolate.CubicSpline(
                    channels, out, axis=0, bc_type="natural"
                )(targets)
            else:
                out = scipy.interpolate.interp1d(channels, out, axis=0)(targets)
        self.set_volume(out)

    def flip_to_positive_increments(self):
        volume = self.materialize()
        f = self.formula
        flipped = False
        if self.v0 > self.vf:
            volume = volume[::-1]
            f[6] = self.nz + 1.0 - f[6]
            f[8] = abs(f[8])
            self.header.velocity_resolution = abs(self.header.velocity_resolution)
            self.header.frequency_resolution = -self.header.frequency_resolution
            flipped = True
        if self.x0 > self.xf:
            volume = volume[:, :, ::-1]
            f[0], f[1], f[2] = 1.0, self.xf, abs(f[2])
            flipped = True
        if self.y0 > self.yf:
            volume = volume[:, ::-1, :]
            f[3], f[4], f[5] = 1.0, self.yf, abs(f[5])
            flipped = True
        if flipped:
            self._state = Materialized(numpy.ascontiguousarray(volume))
            self._update_extrema()
            self._update_wcs()

    def clip(self, x0: int, x1: int, y0: int, y1: int, z0: int, z1: int):
        """Keep the inclusive index ranges [x0, x1], [y0, y1] and [z0, z1]."""
        for name, low, high, size in (
            ("x", x0, x1, self.nx),
            ("y", y0, y1, self.ny),
            ("z", z0, z1, self.nz),
        ):
            if not 0 <= low <= high < size:
                raise ChannelRangeError(
                    f"Invalid {name} range {low}-{high}. Should be within 0-{size - 1}."
                )
        volume = self.materialize()[z0 : z1 + 1, y0 : y1 + 1, x0 : x1 + 1].copy()
        f = self.formula
        f[0] -= x0
        f[3] -= y0
        f[6] -= z0
        self.header.dims[:3] = [x1 - x0 + 1, y1 - y0 + 1, z1 - z0 + 1]
        self._state = Materialized(volume)
        self._update_extrema()
        self._update_wcs()

    def scale_intensity(
        self,
        scale: float | typing.Callable[[numpy.typing.NDArray], numpy.typing.ArrayLike],
    ):
        """Multiply, or map through a vectorized callable, every non-blanked sample."""
        volume = self.materialize()
        valid = ~self._blanked(volume)
        if callable(scale):
            volume[valid] = numpy.asarray(scale(volume[valid]), dtype=numpy.float32)
        else:
            volume[valid] *= numpy.float32(scale)
        self._update_extrema()

    def integrated_intensity(
        self,
        chan0: int | None = None,
        chanf: int | None = None,
        threshold: float | None = None,
        max_size: tuple[int, int, int] | None = None,
        order: typing.Literal["yx", "xy"] = "yx",
    ) -> numpy.typing.NDArray[numpy.float32]:
        """Moment-0 map over planes chan0 to chanf inclusive.

        Args:
            chan0 (int | None, optional): First plane. Defaults to the first.
            chanf (int | None, optional): Last plane. Defaults to the last.
            threshold (float | None, optional): Only samples greater than or
                equal to this value are summed.
            max_size (tuple[int, int, int] | None, optional): Rebin the cube to
                at most (max1, max2, max3) pixels first, as `rebinned` does.
                Planes are then counted in the rebinned cube, whose velocity
                resolution is that of the cube times the reduction factor.
            order (str, optional): "yx" gives a (ny, nx) map like the planes,
                "xy" its transpose. Defaults to "yx".

        Raises:
            ChannelRangeError: The range is empty or leaves the cube.

        Returns:
            NDArray: Sum of value times |velocity resolution|; for a single
            plane cube the values themselves.
        """
        if order not in ("yx", "xy"):
            raise ValueError(f"Unknown map {order = }.")
        if max_size is None:
            nz, ny, nx = self.nz, self.ny, self.nx
            resolution = abs(self.velocity_resolution)
        else:
            volume = self._apply_blanking(self.rebinned(*max_size))
            nz, ny, nx = volume.shape
            resolution = abs(self.velocity_resolution) * _reduction(
                self.nz, max_size[2]
            )
        chan0 = 0 if chan0 is None else chan0
        chanf = nz - 1 if chanf is None else chanf
        if not 0 <= chan0 <= chanf < nz:
            raise ChannelRangeError(
                f"Invalid range of channels {chan0}-{chanf}. "
                f"Should be between 0-{nz - 1}."
            )
        planes = (
            self._planes(chan0, chanf + 1)
            if max_size is None
            else iter(volume[chan0 : chanf + 1])
        )
        factor = 1.0 if nz == 1 else resolution
        budget = WarningBudget()
        out = numpy.zeros((ny, nx), dtype=numpy.float64)
        for k, plane in enumerate(planes, start=chan0):
            finite = numpy.isfinite(plane)
            if not finite.all():
                for y, x in zip(*numpy.nonzero(~finite)):
                    if budget.exhausted:
                        break
                    budget.warn(f"Infinite or NaN found in position {x} {y} {k}.")
            used = finite
            if threshold is not None:
                used = used & (numpy.where(finite, plane, 0.0) >= threshold)
            out[used] += plane[used] * factor
        out = out.astype(numpy.float32)
        return out.T.copy() if order == "xy" else out

    def convolve(
        self, kernel: Kernel, outside_value: float = 0.0, fix_nan: bool = True
    ) -> numpy.typing.NDArray[numpy.float32]:
        """Convolve every pixel with `kernel`; see `convolve_map` for the
        arguments. Blanked samples carry no weight. Returns the new volume and
        leaves the cube untouched."""
        weights = kernel.weights
        coverage = scipy.ndimage.correlate(
            numpy.ones((self.ny, self.nx)), weights, mode="constant", cval=0.0
        )
        outside_weight = weights.sum() - coverage
        budget = WarningBudget()
        out = numpy.empty((self.nz, self.ny, self.nx), dtype=numpy.float32)
        for k, plane in enumerate(self._planes(apply_blanking=False)):
            finite = numpy.isfinite(plane)
            if not finite.all():
                budget.warn(
                    f"{numpy.count_nonzero(~finite)} infinite or NaN samples "
                    f"skipped in plane {k}."
                )
            valid = finite & ~self._blanked(plane)
            total = scipy.ndimage.correlate(
                numpy.where(valid, plane, 0.0), weights, mode="constant", cval=0.0
            )
            norm = scipy.ndimage.correlate(
                valid.astype(numpy.float64), weights, mode="constant", cval=0.0
            )
            if outside_value >= 0:
                total += outside_value * outside_weight
                norm += outside_weight
            with numpy.errstate(divide="ignore", invalid="ignore"):
                result = total / norm
            if not fix_nan:
                result[~finite] = numpy.nan
            out[k] = result
        return out

    def gaussian_kernel(
        self, beam_x: float, beam_y: float, position_angle: float, sampling: float = 4.0
    ) -> Kernel:
        return Kernel.gaussian(
            beam_x, beam_y, position_angle, self.spatial_resolution, sampling
        )

    def convolve_beam(
        self, beam_x: float, beam_y: float, position_angle: float
    ) -> numpy.typing.NDArray[numpy.float32]:
        """Convolve with a Gaussian beam given in arcsec and degrees."""
        return self.convolve(self.gaussian_kernel(beam_x, beam_y, position_angle))

    def convolved_spectrum(
        self, beam_x: float, beam_y: float, position_angle: float, x: int, y: int
    ) -> SpectrumRecord:
        volume = self.volume(apply_blanking=False)
        data = convolve_map(
            volume,
            self.gaussian_kernel(beam_x, beam_y, position_angle),
            x,
            y,
            budget=WarningBudget(),
            valid=~self._blanked(volume),
        )
        return self._spectrum_record(data, x, y, backend="CONVOLVED")

    def _check_pixel(self, x: int, y: int):
        if not (0 <= x < self.nx and 0 <= y < self.ny):
            raise IndexError(f"Pixel ({x}, {y}) is outside a {self.nx}x{self.ny} map.")

    def _spectrum_record(
        self, data: numpy.typing.ArrayLike, x: int, y: int, backend: str
    ) -> SpectrumRecord:
        header = self.header
        f = header.formula
        offset_x, offset_y = self.offset_from_position(x, y)
        metadata = SpectrumMetadata(
            source=header.source,
            line=header.line,
            backend=backend,
            observation_number=1,
            ra=header.ra,
            dec=header.dec,
            epoch=header.epoch,
            offset_x=offset_x / ARCSEC_TO_RAD,
            offset_y=offset_y / ARCSEC_TO_RAD,
            sigma_rms=header.rms,
            reference_channel=f[6],
            reference_frequency=header.rest_frequency,
            reference_velocity=f[7],
            velocity_resolution=f[8],
            image_frequency=header.image_frequency,
        )
        spectrum = Spectrum(
            x=numpy.arange(1, self.nz + 1),
            intensity=data,
            xunit=XUnit.CHANNEL_NUMBER,
            metadata=metadata,
        )
        return SpectrumRecord.from_spectrum(spectrum)

    def spectrum_at(self, x: int, y: int, apply_blanking: bool = True) -> SpectrumRecord:
        self._check_pixel(x, y)
        data = numpy.array(self._raw_volume()[:, y, x])
        if apply_blanking:
            data = self._apply_blanking(data)
        return self._spectrum_record(data, x, y, backend="30M")

    def _matrix_position(self, location: tuple[float, float]) -> tuple[float, float]:
        longitude, latitude = location
        offset_x = longitude - self.header.axis1_position
        if offset_x > math.pi:
            offset_x -= 2.0 * math.pi
        offset_x *= math.cos(self.header.axis2_position)
        offset_y = latitude - self.header.axis2_position
        return self.position_from_offset(offset_x, offset_y)

    def _location(self, px: float, py: float) -> tuple[float, float]:
        offset_x, offset_y = self.offset_from_position(px, py)
        offset_x /= math.cos(self.header.axis2_position)
        return (
            self.header.axis1_position + offset_x,
            self.header.axis2_position + offset_y,
        )

    def _strip_pixels(
        self, loc0: tuple[float, float], loc1: tuple[float, float]
    ) -> list[tuple[int, int]]:
        start = [int(p + 0.5) for p in self._matrix_position(loc0)]
        end = [int(p + 0.5) for p in self._matrix_position(loc1)]
        npoints = int(10.0 * math.hypot(end[0] - start[0], end[1] - start[1]))
        if npoints < 2:
            return []
        step_x = (end[0] - start[0]) / (npoints - 1.0)
        step_y = (end[1] - start[1]) / (npoints - 1.0)
        pixels: list[tuple[int, int]] = []
        for p in range(npoints):
            pixel = (
                int(start[0] + 0.5 + step_x * p),
                int(start[1] + 0.5 + step_y * p),
            )
            if not pixels or pixels[-1] != pixel:
                self._check_pixel(*pixel)
                pixels.append(pixel)
        return pixels

    def strip(
        self, loc0: tuple[float, float], loc1: tuple[float, float]
    ) -> list[SpectrumRecord]:
        """Spectra of the pixels crossed by the straight path between two sky
        positions given as (longitude, latitude) in radians.

        Raises:
            IndexError: The path leaves the map.
        """
        return [self.spectrum_at(px, py) for px, py in self._strip_pixels(loc0, loc1)]

    def strip_array(
        self, loc0: tuple[float, float], loc1: tuple[float, float]
    ) -> numpy.typing.NDArray[numpy.float32]:
        """Position-velocity array of shape (positions, planes)."""
        volume = self.volume()
        pixels = self._strip_pixels(loc0, loc1)
        if not pixels:
            return numpy.empty((0, self.nz), dtype=numpy.float32)
        return numpy.stack([volume[:, py, px] for px, py in pixels])

    def strip_limits(
        self,
        loc0: tuple[float, float],
        loc1: tuple[float, float],
        only_reduce: bool = False,
    ) -> tuple[tuple[float, float], tuple[float, float]]:
        """Stretch or shrink a path so that it runs between the map edges,
        keeping its direction. With `only_reduce` a path already inside the map
        is returned unchanged."""
        x0, y0 = self._matrix_position(loc0)
        x1, y1 = self._matrix_position(loc1)
        last_x, last_y = self.nx - 1.0, self.ny - 1.0
        if only_reduce and all(
            0 <= v <= limit for v, limit in ((x0, last_x), (x1, last_x), (y0, last_y), (y1, last_y))
        ):
            return tuple(loc0), tuple(loc1)

        if x1 == x0:
            start, end = (x0, 0.0), (x1, last_y)
        else:
            m = (y1 - y0) / (x1 - x0)
            n = y1 - m * x1
            if abs(m) >= 1:
                start, end = (-n / m, 0.0), ((last_y - n) / m, last_y)
            else:
                start, end = (0.0, n), (last_x, m * last_x + n)
        return self._location(*start), self._location(*end)

    def _sample(
        self, plane: numpy.typing.NDArray, px: numpy.typing.NDArray, py: numpy.typing.NDArray
    ) -> numpy.typing.NDArray[numpy.float32]:
        values = scipy.ndimage.map_coordinates(
            plane.astype(numpy.float64), [py, px], order=3, mode="nearest"
        )
        outside = (
            (px < -0.5) | (px > self.nx - 0.5) | (py < -0.5) | (py > self.ny - 0.5)
        )
        values[outside] = self.header.blanking
        return values.astype(numpy.float32)

    def reproject(self, ref: "CubeRecord"):
        """Bring the cube to the beam and the spatial grid of `ref`.

        The data are first convolved to the beam of `ref` when it is larger,
        then interpolated at the positions of the pixels of `ref`.
        """
        header = self.header
        ref_beam = ref.header.beam_major / ARCSEC_TO_RAD
        own_beam = header.beam_major / ARCSEC_TO_RAD
        beam = math.sqrt(ref_beam * ref_beam - own_beam * own_beam) if ref_beam > own_beam else math.nan
        if math.isfinite(beam) and beam >= 0.5:
            self.set_volume(self.convolve_beam(beam, beam, 0.0))
            header.beam_major = ref.header.beam_major
            header.beam_minor = ref.header.beam_minor
            header.beam_pa = ref.header.beam_pa
        else:
            loguru.logger.warning(
                f"This cube ({header.source}, {header.line}, {own_beam}\") will not "
                "be convolved since its resolution is equal to or lower than the reference one."
            )

        ref_dx, ref_dy = ref.formula[2], ref.formula[5]
        shift_x = shift_y = 0.0
        if header.axis1_position != ref.header.axis1_position:
            shift_x = -(header.axis1_position - ref.header.axis1_position) / ref_dx
            if shift_x > self.nx:
                shift_x = 0.0
        if header.axis2_position != ref.header.axis2_position:
            shift_y = -(header.axis2_position - ref.header.axis2_position) / ref_dy
            if shift_y > self.ny:
                shift_y = 0.0
        shift_x *= ref_dx
        shift_y *= ref_dy

        offsets_x = ref.x0 + numpy.arange(ref.nx) * ref_dx + shift_x
        offsets_y = ref.y0 + numpy.arange(ref.ny) * ref_dy + shift_y
        offsets_y, offsets_x = numpy.meshgrid(offsets_y, offsets_x, indexing="ij")
        px, py = self.position_from_offset(offsets_x, offsets_y)
        out = numpy.stack([self._sample(plane, px, py) for plane in self._planes()])

        self.set_volume(out)
        header.formula[:6] = ref.formula[:6]
        header.axis1_position = ref.header.axis1_position
        header.axis2_position = ref.header.axis2_position
        self._update_wcs()

    def reproject_in_velocity(self, ref: "CubeRecord"):
        """Resample each spectrum onto the velocity axis of `ref`.

        Every output channel averages the spline interpolated spectrum at
        -0.5, -0.25, 0, 0.25 and 0.5 channels around its position. Channels
        outside the velocity coverage are 0.
        """
        if self.nz < 2:
            raise ValueError("Velocity reprojection needs at least two channels.")
        ref_v0 = ref.v0
        ref_step = (ref.vf - ref_v0) / (ref.nz - 1.0) if ref.nz > 1 else 0.0
        v0, vf = self.v0, self.vf
        last = self.nz - 1.0
        spline = scipy.interpolate.CubicSpline(
            numpy.arange(self.nz, dtype=numpy.float64),
            self.volume(apply_blanking=False).astype(numpy.float64),
            axis=0,
        )
        out = numpy.zeros((ref.nz, self.ny, self.nx), dtype=numpy.float32)
        for k in range(ref.nz):
            velocity = ref_v0 + k * ref_step
            position = last * (velocity - v0) / (vf - v0)
            if not 0 <= position <= last:
                continue
            samples = [
                position + offset
                for offset in (-0.5, -0.25, 0.0, 0.25, 0.5)
                if 0 <= position + offset <= last
            ]
            out[k] = spline(samples).mean(axis=0)

        self.set_volume(out)
        self.header.formula[6:9] = ref.formula[6:9]
        self.header.velocity_resolution = ref.formula[8]
        self.header.frequency_resolution = ref.header.frequency_resolution
        self._update_wcs()

    def reproject_all(self, ref: "CubeRecord"):
        """Match `ref` pixel by pixel and channel by channel: spatial grid and
        beam, rest frequency, reference velocity and velocity axis."""
        self.reproject(ref)
        record = self.spectrum_at(0, 0, apply_blanking=False)
        record.modify_rest_frequency(ref.rest_frequency)
        record.modify_reference_velocity(ref.formula[7])

        header = self.header
        header.rest_frequency = record.reference_frequency
        header.formula[6] = record.reference_channel
        header.formula[7] = record.reference_velocity
        header.formula[8] = record.velocity_resolution
        header.velocity_offset = record.reference_velocity
        header.velocity_resolution = record.velocity_resolution
        self._update_wcs()
        self.reproject_in_velocity(ref)

    def correct_for_primary_beam(self, primary_beam: float = 0.0, radius: float = 0.0):
        """Divide by a Gaussian primary beam response.

        Args:
            primary_beam (float, optional): FWHM in arcsec. 0 or less uses 43"
                scaled from 115 GHz to the rest frequency.
            radius (float, optional): Only pixels within this radius (arcsec)
                from the map centre are corrected. 0 or less corrects all.
        """
        if primary_beam <= 0:
            primary_beam = 115.0 * 43.0 / (self.rest_frequency * 0.001)
        sampling = 0.5 * abs(self.x0 - self.xf) / (primary_beam * ARCSEC_TO_RAD)
        kernel = self.gaussian_kernel(primary_beam, primary_beam, 0.0, sampling)
        rows, columns = numpy.mgrid[0 : self.ny, 0 : self.nx].astype(numpy.float64)
        response = scipy.ndimage.map_coordinates(
            kernel.weights, [rows + 0.5, columns + 0.5], order=2, mode="nearest"
        )

        volume = self.volume()
        selected = numpy.ones((self.ny, self.nx), dtype=bool)
        if radius > 0:
            distance = self.spatial_resolution * numpy.hypot(
                rows - self.ny / 2.0 - 0.5, columns - self.nx / 2.0 - 0.5
            )
            selected = distance <= radius
        with numpy.errstate(divide="ignore", invalid="ignore"):
            corrected = volume / response
        corrected[:, response == 0.0] = numpy.nan
        volume[:, selected] = corrected[:, selected]
        self.set_volume(volume)

    def write(self, path: pathlib.Path | str, codec: ByteCodec | None = None):
        """Write the cube in the LMV layout, IEEE little-endian by default."""
        codec = SwappedOrderCodec() if codec is None else codec
        path = pathlib.Path(path)
        if self.path is not None and path.resolve() == self.path.resolve():
            self.materialize()

        header = copy.deepcopy(self.header)
        header.image_format = IMAGE_FORMAT
        header.nblocks = 15 + int(2.0 * self.nx * self.ny * self.nz * 4.0 / 1024.0)
        dtype = numpy.dtype(f"{codec.byteorder}f4")
        with open(path, "wb") as f:
            f.write(header.to_bytes(codec))
            for plane in self._planes(apply_blanking=False):
                f.write(numpy.asarray(plane, dtype=dtype).tobytes())
            f.write(bytes(4 * TRAILING_WORDS))

    def to_fits(self, path: pathlib.Path | str, overwrite: bool = False):
        header = self.header
        fits_header = self.wcs.to_header()
        fits_header["BUNIT"] = header.unit
        fits_header["BMAJ"] = math.degrees(header.beam_major)
        fits_header["BMIN"] = math.degrees(header.beam_minor)
        fits_header["BPA"] = header.beam_pa
        fits_header["RESTFREQ"] = header.rest_frequency * 1.0e6
        fits_header["LINE"] = header.line
        fits_header["OBJECT"] = header.source
        fits_header["EPOCH"] = header.epoch
        fits_header["GBLANK"] = (header.blanking, "GILDAS blanking value")

        data = self.volume(apply_blanking=False)
        data[self._blanked(data)] = numpy.nan
        hdu = astropy.io.fits.PrimaryHDU(data=data, header=fits_header)
        hdu.writeto(path, overwrite=overwrite)

    @classmethod
    def from_fits(cls, path: pathlib.Path | str) -> "CubeRecord":
        with astropy.io.fits.open(path) as hdulist:
            hdu = hdulist[0]
            data = numpy.array(hdu.data, dtype=numpy.float32)
            fits_header = hdu.header.copy()
        if data.ndim != 3:
            raise FormatError(f"Expecting a 3-axis image in {path}, found {data.ndim}.")

        wcs = astropy.wcs.WCS(fits_header)
        lon_type, lat_type = (ctype.split("-")[0] for ctype in wcs.wcs.ctype[:2])
        coordinate_system = {"GLON": "GALACTIC", "ELON": "ECLIPTIC"}.get(
            lon_type, "EQUATORIAL"
        )
        projection = CubeProjection.from_wcs_code(wcs.wcs.ctype[0][5:8])
        crpix, crval, cdelt = wcs.wcs.crpix, wcs.wcs.crval, wcs.wcs.cdelt
        to_kms = astropy.units.Unit(str(wcs.wcs.cunit[2]) or "m/s").to("km/s")
        formula = [
            crpix[0],
            0.0,
            math.radians(cdelt[0]),
            crpix[1],
            0.0,
            math.radians(cdelt[1]),
            crpix[2],
            crval[2] * to_kms,
            cdelt[2] * to_kms,
        ]

        blanking = fits_header.get("GBLANK")
        fields: dict[str, typing.Any] = {}
        if blanking is not None:
            data[~numpy.isfinite(data)] = blanking
            fields["blanking"] = float(blanking)
        rest_frequency = float(fits_header.get("RESTFREQ", wcs.wcs.restfrq or 0.0))
        return cls.from_volume(
            data,
            formula,
            unit=str(fits_header.get("BUNIT", "K")),
            axis_labels=[lon_type, lat_type, "VELOCITY", ""],
            coordinate_system=coordinate_system,
            source=str(fits_header.get("OBJECT", "")),
            line=str(fits_header.get("LINE", "")),
            epoch=float(fits_header.get("EPOCH", fits_header.get("EQUINOX", 2000.0))),
            projection=int(projection),
            axis1_position=math.radians(crval[0]),
            axis2_position=math.radians(crval[1]),
            rest_frequency=rest_frequency * 1.0e-6,
            velocity_resolution=cdelt[2] * to_kms,
            velocity_offset=crval[2] * to_kms,
            beam_major=math.radians(float(fits_header.get("BMAJ", 0.0))),
            beam_minor=math.radians(float(fits_header.get("BMIN", 0.0))),
            beam_pa=float(fits_header.get("BPA", 0.0)),
            **fields,
        )
