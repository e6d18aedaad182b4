import dataclasses
import datetime
import enum
import pathlib
import typing
from typing_extensions import Self

import loguru
import numpy
import numpy.typing

from .utils import centered_move_mean, centered_move_sum

__all__ = [
    "XUnit",
    "SpectrumMetadata",
    "Spectrum",
]


class XUnit(enum.Enum):
    CHANNEL_NUMBER = "channel"
    VELOCITY_KMS = "km/s"
    VELOCITY_KMS_CORRECTED = "km/s (corrected)"
    FREQUENCY_HZ = "Hz"
    FREQUENCY_MHZ = "MHz"
    FREQUENCY_GHZ = "GHz"

    @property
    def to_mhz(self) -> float:
        return {
            XUnit.FREQUENCY_HZ: 1e-6,
            XUnit.FREQUENCY_MHZ: 1.0,
            XUnit.FREQUENCY_GHZ: 1e3,
        }[self]

    @property
    def is_frequency(self) -> bool:
        return self in (XUnit.FREQUENCY_HZ, XUnit.FREQUENCY_MHZ, XUnit.FREQUENCY_GHZ)


@dataclasses.dataclass
class SpectrumMetadata:
    source: str = ""
    line: str = ""
    backend: str = ""
    observation_number: int = 0
    scan_number: int = 0
    ra: float = 0.0
    dec: float = 0.0
    epoch: float = 2000.0
    offset_x: float = 0.0
    offset_y: float = 0.0
    observing_date: datetime.date | None = None
    ut_hours: float = 0.0
    integration_time: float = 0.0
    beam_efficiency: float = 0.0
    sigma_rms: float = 0.0
    reference_channel: float = 1.0
    reference_frequency: float = 0.0
    reference_velocity: float = 0.0
    velocity_resolution: float = 1.0
    image_frequency: float = 0.0




def _quadrature(
    a: numpy.typing.NDArray[numpy.floating] | None,
    b: numpy.typing.NDArray[numpy.floating] | None,
) -> numpy.typing.NDArray[numpy.floating] | None:
    if a is None:
        return b
    if b is None:
        return a
    return numpy.hypot(a, b)


class SpectrumLike:
    """Named columns of equal length, any of which may be absent (None).

    Columns are reachable as attributes. Scalar attributes reported by
    `_attributes()` travel with the columns through the npz and txt files.
    """

    _columns: dict[str, numpy.typing.NDArray | None]

    def __init__(
        self, **columns: tuple[numpy.typing.ArrayLike | None, numpy.typing.DTypeLike]
    ):
        self._columns = {
            name: None if value is None else numpy.array(value, dtype=dtype)
            for name, (value, dtype) in columns.items()
        }
        shapes = {column.shape for column in self._present().values()}
        if len(shapes) > 1:
            raise ValueError(f"Columns have different shapes {sorted(shapes)}.")

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._columns[name]
        except KeyError:
            raise AttributeError(
                f"{type(self).__name__!r} has no column {name!r}"
            ) from None

    def _present(self) -> dict[str, numpy.typing.NDArray]:
        return {name: value for name, value in self._columns.items() if value is not None}

    def _attributes(self) -> dict[str, str]:
        return {}

    def __len__(self) -> int:
        return next((len(value) for value in self._present().values()), 0)

    def is_sorted_by(self, name: str) -> bool:
        column = self._columns.get(name)
        return column is not None and bool(numpy.all(numpy.diff(column) >= 0))

    def sort_by(self, name: str):
        column = self._columns.get(name)
        if column is None:
            loguru.logger.error(f"Cannot sort by {name}: no such column.")
            return
        if self.is_sorted_by(name):
            return
        order = numpy.argsort(column, kind="stable")
        for key, value in self._present().items():
            self._columns[key] = value[order]

    def to_npz(self, path: pathlib.Path):
        numpy.savez_compressed(path, **self._present(), **self._attributes())

    @classmethod
    def from_npz(cls, path: pathlib.Path) -> Self:
        with numpy.load(path) as npz:
            values = {
                key: npz[key].item() if npz[key].ndim == 0 else npz[key]
                for key in npz.files
            }
        return cls(**values)

    def to_txt(self, path: pathlib.Path, columns: list[str] | None = None):
        """Write the columns as text, one row per channel.

        The first comment line names the columns and each following one holds
        an attribute as `name=value`.
        """
        present = self._present()
        columns = list(present) if columns is None else columns
        missing = [name for name in columns if name not in present]
        if missing:
            loguru.logger.error(f"Cannot write missing columns {missing}.")
            return
        header = [" ".join(columns)]
        header += [f"{key}={value}" for key, value in self._attributes().items()]
        numpy.savetxt(
            path,
            numpy.column_stack([present[name] for name in columns]),
            header="\n".join(header),
        )

    @classmethod
    def from_txt(cls, path: pathlib.Path) -> Self:
        header: list[str] = []
        with open(path, mode="r") as fin:
            for line in fin:
                if not line.startswith("#"):
                    break
                header.append(line[1:].strip())
        columns = header[0].split()
        attributes = dict(item.split("=", 1) for item in header[1:])
        rows = numpy.loadtxt(path, ndmin=2)
        return cls(**dict(zip(columns, rows.T)), **attributes)


class Spectrum(SpectrumLike):
    """A generic spectrum: intensities over an x axis in some unit.

    This is the exchange type between GILDAS records and the rest of the world.
    Telescope-specific fields travel in `metadata`.
    """

    x: numpy.typing.NDArray[numpy.floating]
    intensity: numpy.typing.NDArray[numpy.floating]
    noise: numpy.typing.NDArray[numpy.floating] | None
    xunit: XUnit
    metadata: SpectrumMetadata

    def __init__(
        self,
        *,
        x: numpy.typing.ArrayLike,
        intensity: numpy.typing.ArrayLike,
        noise: numpy.typing.ArrayLike | None = None,
        xunit: XUnit | str = XUnit.CHANNEL_NUMBER,
        metadata: SpectrumMetadata | None = None,
    ):
        super().__init__(
            x=(x, numpy.float64),
            intensity=(intensity, numpy.float64),
            noise=(noise, numpy.float64),
        )
        self.xunit = XUnit(xunit)
        self.metadata = SpectrumMetadata() if metadata is None else metadata

    def _attributes(self) -> dict[str, str]:
        return {"xunit": self.xunit.value}

    def _with(self, intensity, noise) -> "Spectrum":
        return Spectrum(
            x=self.x,
            intensity=intensity,
            noise=noise,
            xunit=self.xunit,
            metadata=dataclasses.replace(self.metadata),
        )

    def __neg__(self) -> "Spectrum":
        return self._with(-self.intensity, self.noise)

    def __add__(self, other: "int | float | Spectrum") -> "Spectrum":
        # The x axis of the left operand is kept.
        if isinstance(other, Spectrum):
            return self._with(
                self.intensity + other.intensity, _quadrature(self.noise, other.noise)
            )
        if isinstance(other, (int, float)):
            return self._with(self.intensity + other, self.noise)
        return NotImplemented

    __radd__ = __add__

    def __sub__(self, other: "int | float | Spectrum") -> "Spectrum":
        return self + (-other)

    def __rsub__(self, other: int | float) -> "Spectrum":
        return -self + other

    def __mul__(self, other: int | float) -> "Spectrum":
        if not isinstance(other, (int, float)):
            return NotImplemented
        noise = None if self.noise is None else self.noise * abs(other)
        return self._with(self.intensity * other, noise)

    __rmul__ = __mul__

    def __truediv__(self, other: int | float) -> "Spectrum":
        if not isinstance(other, (int, float)):
            return NotImplemented
        return self * (1.0 / other)

    def get_moving_averaged_spectrum(self, half_moving_window: int = 10) -> "Spectrum":
        """Centred moving average over 2 * half_moving_window + 1 channels.

        NaN channels are left out of each window and get the average of their
        neighbours; the noise is combined in quadrature.
        """
        finite = numpy.isfinite(self.intensity)
        count = centered_move_sum(finite.astype(numpy.float64), half_moving_window)

        def window_sum(values):
            return centered_move_sum(
                numpy.where(finite, values, numpy.nan), half_moving_window
            )

        intensity = window_sum(self.intensity) / count
        noise = None
        if self.noise is not None:
            noise = numpy.sqrt(window_sum(numpy.square(self.noise))) / count
        return self._with(intensity, noise)

    def rms(self, half_moving_window: int | None = None) -> float:
        """Root mean square of the finite intensities, optionally around a
        moving mean instead of zero."""
        intensity = self.intensity
        if half_moving_window is not None:
            intensity = intensity - centered_move_mean(intensity, half_moving_window)
        return float(numpy.sqrt(numpy.nanmean(numpy.square(intensity))))

    def from_callable(self, callable: typing.Callable) -> "Spectrum":
        return self._with(callable(self.x), None)
