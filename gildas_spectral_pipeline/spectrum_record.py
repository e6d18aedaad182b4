import copy
import math
import pathlib

import astropy.constants  # type: ignore
import astropy.coordinates  # type: ignore
import astropy.io.fits  # type: ignore
import astropy.units  # type: ignore
import loguru
import numpy
import numpy.typing
import scipy.interpolate  # type: ignore

from .codec import date_to_gildas_day, gildas_day_to_date
from .parameter import (
    CoordinateType,
    Parameter,
    ParameterKey as K,
    Projection,
    VelocityType,
)
from .spectrum import Spectrum, SpectrumMetadata, XUnit
from .spectrum_header import SpectrumHeader
from .spectrum_line import SpectrumLine, gaussian_area
from .utils import ARCSEC_TO_RAD

__all__ = [
    "SpectrumRecord",
    "SPEED_OF_LIGHT",
]

SPEED_OF_LIGHT = astropy.constants.c.to_value("km/s")

ArrayOrFloat = float | numpy.typing.NDArray[numpy.floating]

# IRAM 30m site, used when a record is built from a generic spectrum
DEFAULT_ALTITUDE = 2851.5
DEFAULT_LONGITUDE = -0.05931949000000015
DEFAULT_LATITUDE = 0.6469658600000003


class SpectrumRecord:
    """One observation of a CLASS container: parameters, header and channels.

    `data[0]` holds channel 1. The NCHAN parameter always equals `len(data)`.
    """

    parameters: dict[str, Parameter]
    header: SpectrumHeader

    def __init__(
        self,
        header: SpectrumHeader,
        data: numpy.typing.ArrayLike,
        parameters: dict[str, Parameter] | None = None,
    ):
        self.header = header
        self.parameters = {} if parameters is None else dict(parameters)
        data = numpy.asarray(data, dtype=numpy.float32).ravel()
        nchan = self.get(K.NCHAN)
        if nchan is None:
            self.put(K.NCHAN, len(data))
        elif nchan.as_int() != len(data):
            raise ValueError(
                f"Number of channels {nchan.as_int()} does not match data length {len(data)}."
            )
        self._data = data

    @property
    def data(self) -> numpy.typing.NDArray[numpy.float32]:
        return self._data

    @data.setter
    def data(self, data: numpy.typing.ArrayLike):
        self._data = numpy.asarray(data, dtype=numpy.float32).ravel()
        self.put(K.NCHAN, len(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return (
            f"SpectrumRecord(num={self.header.num}, source={self.header.source!r}, "
            f"line={self.header.line!r}, nchan={len(self)})"
        )

    def get(self, key: str) -> Parameter | None:
        return self.parameters.get(str(key))

    def put(self, key: str, value: Parameter | float | int | str):
        if not isinstance(value, Parameter):
            value = Parameter.for_key(key, value)
        self.parameters[str(key)] = value

    def value(self, key: str, default: float = 0.0) -> float:
        parameter = self.get(key)
        if parameter is None:
            return default
        return parameter.as_float()

    def copy(self) -> "SpectrumRecord":
        return SpectrumRecord(
            copy.copy(self.header), self._data.copy(), dict(self.parameters)
        )

    def visible_header(self) -> list[Parameter]:
        return self.header.visible()

    @property
    def nchan(self) -> int:
        return len(self._data)

    @property
    def reference_channel(self) -> float:
        return self.value(K.REF_CHAN)

    @property
    def reference_velocity(self) -> float:
        return self.value(K.REF_VEL)

    @property
    def velocity_resolution(self) -> float:
        return self.value(K.VEL_RESOL)

    @property
    def reference_frequency(self) -> float:
        return self.value(K.REF_FREQ)

    @property
    def reference_image_frequency(self) -> float:
        return self.value(K.IMAGE)

    @property
    def frequency_resolution(self) -> float:
        return -self.velocity_resolution * self.reference_frequency / SPEED_OF_LIGHT

    def channels(self) -> numpy.typing.NDArray[numpy.floating]:
        return numpy.arange(1, self.nchan + 1, dtype=numpy.float64)

    def velocities(self) -> numpy.typing.NDArray[numpy.floating]:
        return self.velocity(self.channels())

    def frequencies(self) -> numpy.typing.NDArray[numpy.floating]:
        return self.frequency(self.channels())

    def velocity(self, channel: ArrayOrFloat) -> ArrayOrFloat:
        return self.reference_velocity + (
            channel - self.reference_channel
        ) * self.velocity_resolution

    def channel(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        return (
            velocity - self.reference_velocity
        ) / self.velocity_resolution + self.reference_channel

    def frequency(self, channel: ArrayOrFloat) -> ArrayOrFloat:
        return self.frequency_for_velocity(self.velocity(channel))

    def image_frequency(self, channel: ArrayOrFloat) -> ArrayOrFloat:
        return self.image_frequency_for_velocity(self.velocity(channel))

    def corrected_velocity(self, channel: ArrayOrFloat) -> ArrayOrFloat:
        return self.corrected_velocity_for_frequency(self.frequency(channel))

    def channel_for_frequency(self, frequency: ArrayOrFloat) -> ArrayOrFloat:
        return self.channel(self.velocity_for_frequency(frequency))

    def frequency_for_velocity(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        delta = (velocity - self.reference_velocity) / self.velocity_resolution
        return self.reference_frequency + delta * self.frequency_resolution

    def velocity_for_frequency(self, frequency: ArrayOrFloat) -> ArrayOrFloat:
        delta = (frequency - self.reference_frequency) / self.frequency_resolution
        return self.reference_velocity + delta * self.velocity_resolution

    def velocity_for_rest_frequency(
        self, frequency: ArrayOrFloat, rest_frequency: float
    ) -> ArrayOrFloat:
        """Velocity of `frequency` on the scale of another rest frequency.

        The channel spacing of the record is kept and no relativistic
        correction is applied, as GILDAS does.
        """
        delta = (frequency - rest_frequency) / self.frequency_resolution
        return self.reference_velocity + delta * self.velocity_resolution

    def frequency_for_corrected_velocity(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        return self.reference_frequency / (
            1.0 - (self.reference_velocity - velocity) / SPEED_OF_LIGHT
        )

    def corrected_velocity_for_frequency(self, frequency: ArrayOrFloat) -> ArrayOrFloat:
        return (
            self.reference_velocity
            - (1.0 - self.reference_frequency / frequency) * SPEED_OF_LIGHT
        )

    def corrected_velocity_for_gildas_velocity(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        return self.corrected_velocity_for_frequency(self.frequency_for_velocity(velocity))

    def gildas_velocity_for_corrected_velocity(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        return self.velocity_for_frequency(self.frequency_for_corrected_velocity(velocity))

    def image_frequency_for_velocity(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        image = self.reference_image_frequency
        if image == 0:
            return velocity * 0.0
        delta = (velocity - self.reference_velocity) / self.velocity_resolution
        return image - delta * self.frequency_resolution

    def image_frequency_for_corrected_velocity(self, velocity: ArrayOrFloat) -> ArrayOrFloat:
        return self.image_frequency_for_velocity(
            self.gildas_velocity_for_corrected_velocity(velocity)
        )

    def velocity_for_image_frequency(self, frequency: ArrayOrFloat) -> ArrayOrFloat:
        image = self.reference_image_frequency
        fref = self.reference_frequency
        delta = (frequency - (image - fref) - fref) / self.frequency_resolution
        return self.reference_velocity - delta * self.velocity_resolution

    def corrected_velocity_for_image_frequency(self, frequency: ArrayOrFloat) -> ArrayOrFloat:
        return self.corrected_velocity_for_frequency(
            self.frequency_for_velocity(self.velocity_for_image_frequency(frequency))
        )

    def channel_width(self, frequency: float) -> float:
        """Width of one channel in corrected velocity, signed like the velocity
        resolution."""
        v0 = self.corrected_velocity_for_frequency(frequency)
        v1 = self.corrected_velocity_for_frequency(frequency + self.frequency_resolution)
        return abs(v1 - v0) * math.copysign(1.0, self.velocity_resolution)

    def to_corrected_velocity(self, line: SpectrumLine) -> SpectrumLine:
        out = line.copy()
        out.vel = self.corrected_velocity_for_gildas_velocity(line.vel)
        factor = (
            self.channel_width(self.frequency_for_velocity(line.vel))
            / self.velocity_resolution
        )
        out.width *= factor
        out.width_error *= factor
        out.vel_error *= factor
        out.area, out.area_error = gaussian_area(
            out.width, out.width_error, out.peak, out.peak_error
        )
        return out

    def to_gildas_velocity(self, line: SpectrumLine) -> SpectrumLine:
        out = line.copy()
        out.vel = self.gildas_velocity_for_corrected_velocity(line.vel)
        factor = (
            self.channel_width(self.frequency_for_corrected_velocity(line.vel))
            / self.velocity_resolution
        )
        out.width /= factor
        out.width_error /= factor
        out.vel_error /= factor
        out.area, out.area_error = gaussian_area(
            out.width, out.width_error, out.peak, out.peak_error
        )
        return out

    def resample(self, other: "SpectrumRecord"):
        """Spline-resample onto the channel grid of `other`. Channels outside the
        current coverage are set to zero."""
        reference_velocity = other.reference_velocity
        target = self.channel(other.velocities())
        inside = (target >= 1) & (target <= self.nchan)
        resampled = numpy.zeros(other.nchan, dtype=numpy.float32)
        if numpy.any(inside):
            spline = scipy.interpolate.CubicSpline(self.channels(), self._data)
            resampled[inside] = spline(target[inside])

        frequency = self.frequency_for_velocity(reference_velocity)
        image = self.image_frequency_for_velocity(reference_velocity)

        self.data = resampled
        self.put(K.REF_CHAN, other.reference_channel)
        self.put(K.REF_VEL, reference_velocity)
        self.put(K.VEL_RESOL, other.velocity_resolution)
        self.put(K.REF_FREQ, float(frequency))
        self.put(K.IMAGE, float(image))
        self.put(K.FREQ_RESOL, self.frequency_resolution)

    def crop(self, chan0: int, chanf: int):
        if chan0 > chanf:
            chan0, chanf = chanf, chan0
        chan0 = max(chan0, 1)
        chanf = min(chanf, self.nchan)
        if chan0 > 1:
            self.put(K.REF_CHAN, self.reference_channel - (chan0 - 1.0))
        if chan0 > 1 or chanf < self.nchan:
            self.data = self._data[chan0 - 1 : chanf]

    def modify_rest_frequency(self, frequency: float):
        """Change the rest frequency keeping the sky frequency of every channel.

        The reference channel moves to where `frequency` falls and keeps its
        reference velocity, so velocities are relabelled for the new line.
        """
        rest = self.reference_frequency
        if frequency == rest:
            return
        fres = self.frequency_resolution
        reference_channel = self.reference_channel + (frequency - rest) / fres
        self.put(K.REF_CHAN, reference_channel)
        self.put(K.VEL_RESOL, -fres * SPEED_OF_LIGHT / frequency)
        self.put(K.REF_FREQ, frequency)
        if self.reference_image_frequency != 0:
            self.put(K.IMAGE, self.reference_image_frequency + (rest - frequency))

    def modify_reference_velocity(self, velocity: float):
        self.put(K.REF_VEL, velocity)

    def as_spectrum(self, xunit: XUnit = XUnit.VELOCITY_KMS) -> Spectrum:
        channels = self.channels()
        if xunit is XUnit.CHANNEL_NUMBER:
            x = channels
        elif xunit is XUnit.VELOCITY_KMS:
            x = self.velocity(channels)
        elif xunit is XUnit.VELOCITY_KMS_CORRECTED:
            x = self.corrected_velocity(channels)
        elif xunit.is_frequency:
            x = self.frequency(channels) / xunit.to_mhz
        else:
            raise ValueError(f"Unsupported {xunit = }.")

        observing_date = None
        if self.header.ldobs != 0:
            observing_date = gildas_day_to_date(self.header.ldobs)
        ra, dec = self.value(K.LAMBDA), self.value(K.BETA)
        if self.header.typec == CoordinateType.GALACTIC:
            ra, dec = _galactic_to_equatorial(ra, dec)
        elif self.header.typec not in (CoordinateType.EQUATORIAL, 0):
            loguru.logger.warning(
                f"Coordinates of type {self.header.typec} are kept unconverted."
            )

        metadata = SpectrumMetadata(
            source=self.header.source,
            line=self.header.line,
            backend=self.header.teles,
            observation_number=self.header.num,
            scan_number=self.header.scan,
            ra=ra,
            dec=dec,
            epoch=self.value(K.EPOCH, 2000.0),
            offset_x=self.header.off1 / ARCSEC_TO_RAD,
            offset_y=self.header.off2 / ARCSEC_TO_RAD,
            observing_date=observing_date,
            ut_hours=self.value(K.UT_TIME),
            integration_time=self.value(K.INTEG),
            beam_efficiency=self.value(K.BEAM_EFF),
            sigma_rms=self.value(K.SIGMA),
            reference_channel=self.reference_channel,
            reference_frequency=self.reference_frequency,
            reference_velocity=self.reference_velocity,
            velocity_resolution=self.velocity_resolution,
            image_frequency=self.reference_image_frequency,
        )
        return Spectrum(
            x=x, intensity=self._data, xunit=xunit, metadata=metadata
        )

    @classmethod
    def from_spectrum(cls, spectrum: Spectrum) -> "SpectrumRecord":
        """Build a record from a generic spectrum.

        The x axis is converted to channels, sorted, and resampled with a cubic
        spline onto integer channels when it does not already start at channel 1
        with a unit step.

        Raises:
            ValueError: The spectrum has no channels.
        """
        if len(spectrum) == 0:
            raise ValueError("Cannot build a GILDAS spectrum without channels.")
        metadata = spectrum.metadata
        refch = metadata.reference_channel
        v0 = metadata.reference_velocity
        velres = metadata.velocity_resolution
        rfreq = metadata.reference_frequency
        image = metadata.image_frequency

        x = numpy.array(spectrum.x, dtype=numpy.float64)
        if spectrum.xunit is XUnit.VELOCITY_KMS:
            x = (x - v0) / velres + refch
        elif spectrum.xunit is XUnit.VELOCITY_KMS_CORRECTED:
            frequency = rfreq / (1.0 - (v0 - x) / SPEED_OF_LIGHT)
            fres = -velres * rfreq / SPEED_OF_LIGHT
            x = (frequency - rfreq) / fres + refch
        elif spectrum.xunit.is_frequency:
            fres = -velres * rfreq / SPEED_OF_LIGHT
            x = (x * spectrum.xunit.to_mhz - rfreq) / fres + refch

        order = numpy.argsort(x, kind="stable")
        x = x[order]
        y = numpy.asarray(spectrum.intensity, dtype=numpy.float64)[order]

        reason = None
        step = numpy.diff(x)
        if x[0] != 1:
            reason = "first channel is not 1"
        elif numpy.any(numpy.abs(x - numpy.round(x)) > 1.0e-3):
            reason = "non-integer channels"
        elif step.size > 0 and not numpy.allclose(step, step[0], rtol=0, atol=1e-6):
            reason = "non-constant velocity resolution"

        if reason is not None:
            loguru.logger.warning(
                f"Input spectrum data will be resampled ({reason}) to convert it to GILDAS."
            )
            first, last = math.ceil(x[0] - 1.0e-9), math.floor(x[-1] + 1.0e-9)
            channels = numpy.arange(first, last + 1, dtype=numpy.float64)
            y = scipy.interpolate.CubicSpline(x, y)(channels)
            vfirst = v0 + (first - refch) * velres
            vlast = v0 + (last - refch) * velres
            delta = (vfirst - v0) / velres
            fres = -velres * rfreq / SPEED_OF_LIGHT
            if image != 0:
                image = image - delta * fres
            refch = 1.0
            v0 = vfirst
            if channels.size > 1:
                velres = (vlast - vfirst) / (channels.size - 1)
            rfreq = rfreq + delta * fres

        date_code = 0
        if metadata.observing_date is not None:
            date_code = date_to_gildas_day(metadata.observing_date)
        off1 = metadata.offset_x * ARCSEC_TO_RAD
        off2 = metadata.offset_y * ARCSEC_TO_RAD
        header = SpectrumHeader(
            num=metadata.observation_number,
            source=metadata.source,
            line=metadata.line,
            teles=metadata.backend,
            ldobs=date_code,
            ldred=date_code,
            off1=off1,
            off2=off2,
            typec=int(CoordinateType.EQUATORIAL),
            scan=metadata.scan_number,
        )

        values: dict[str, float | int | str] = {
            K.UT_TIME: metadata.ut_hours,
            K.LST_TIME: 0.0,
            K.AZIMUTH: 0.0,
            K.ELEVATION: 0.0,
            K.TAU: 0.0,
            K.TSYS: 0.0,
            K.INTEG: metadata.integration_time,
            K.SOURCE: metadata.source,
            K.EPOCH: metadata.epoch,
            K.LAMBDA: metadata.ra,
            K.BETA: metadata.dec,
            K.LAMBDA_OFF: off1,
            K.BETA_OFF: off2,
            K.PROJECTION: int(Projection.RADIO),
            K.LINE: metadata.line,
            K.TELES: metadata.backend,
            K.REF_FREQ: rfreq,
            K.NCHAN: int(y.size),
            K.REF_CHAN: float(refch),
            K.FREQ_RESOL: -velres * rfreq / SPEED_OF_LIGHT,
            K.FREQ_OFF: 0.0,
            K.VEL_RESOL: velres,
            K.REF_VEL: v0,
            K.BAD: 0.0,
            K.IMAGE: image,
            K.VEL_TYPE: int(VelocityType.LSR),
            K.DOPPLER: 0.0,
            K.BEAM_EFF: metadata.beam_efficiency,
            K.FORW_EFF: 0.0,
            K.GAIN_IM: 0.0,
            K.H2OMM: 0.0,
            K.PAMB: 0.0,
            K.TAMB: 0.0,
            K.TATMSIG: 0.0,
            K.TCHOP: 0.0,
            K.TCOLD: 0.0,
            K.TAUSIG: 0.0,
            K.TAUIMA: 0.0,
            K.TATMIMG: 0.0,
            K.TREC: 0.0,
            K.MODE: 1,
            K.FACTOR: 0.0,
            K.ALTITUDE: DEFAULT_ALTITUDE,
            K.COUNT1: 0.0,
            K.COUNT2: 0.0,
            K.COUNT3: 0.0,
            K.LONOFF: 0.0,
            K.LATOFF: 0.0,
            K.LON: DEFAULT_LONGITUDE,
            K.LAT: DEFAULT_LATITUDE,
            K.OTF_NDUMPS: 0,
            K.OTF_LEN_HEADER: 0,
            K.OTF_LEN_DATA: 0,
            K.OTF_LEN_DUMP: 0,
            K.NPHASE: 0,
            K.SWMODE: 0,
            K.SIGMA: metadata.sigma_rms,
        }
        parameters = {
            str(key): Parameter.for_key(key, value) for key, value in values.items()
        }
        return cls(header, y.astype(numpy.float32), parameters)

    def to_fits(self, path: pathlib.Path | str, overwrite: bool = False):
        """Write a one-axis FITS spectrum with a radio velocity axis in m/s."""
        header = astropy.io.fits.Header()
        header["BUNIT"] = "K"
        header["CTYPE1"] = "VRAD"
        header["CUNIT1"] = "m/s"
        header["CRPIX1"] = self.reference_channel
        header["CRVAL1"] = self.reference_velocity * 1.0e3
        header["CDELT1"] = self.velocity_resolution * 1.0e3
        header["RESTFREQ"] = (self.reference_frequency * 1.0e6, "Rest frequency")
        header["IMAGFREQ"] = (self.reference_image_frequency * 1.0e6, "Image frequency")
        header["OBJECT"] = self.header.source
        header["LINE"] = (self.header.line, "Line name")
        header["TELESCOP"] = self.header.teles
        header["OBSNUM"] = self.header.num
        header["SCAN"] = self.header.scan
        header["RA"] = (math.degrees(self.value(K.LAMBDA)), "deg")
        header["DEC"] = (math.degrees(self.value(K.BETA)), "deg")
        header["EQUINOX"] = self.value(K.EPOCH, 2000.0)
        header["OFFSETX"] = (self.header.off1 / ARCSEC_TO_RAD, "arcsec")
        header["OFFSETY"] = (self.header.off2 / ARCSEC_TO_RAD, "arcsec")
        header["OBSTIME"] = (self.value(K.INTEG), "Integration time (s)")
        header["BEAMEFF"] = self.value(K.BEAM_EFF)
        if self.header.ldobs != 0:
            header["DATE-OBS"] = gildas_day_to_date(self.header.ldobs).isoformat()
        hdu = astropy.io.fits.PrimaryHDU(data=self._data, header=header)
        hdu.writeto(path, overwrite=overwrite)

    @classmethod
    def from_fits(cls, path: pathlib.Path | str) -> "SpectrumRecord":
        with astropy.io.fits.open(path) as hdulist:
            hdu = hdulist[0]
            data = numpy.array(hdu.data, dtype=numpy.float32).ravel()
            fits_header = hdu.header
            metadata = SpectrumMetadata(
                source=str(fits_header.get("OBJECT", "")),
                line=str(fits_header.get("LINE", "")),
                backend=str(fits_header.get("TELESCOP", "")),
                observation_number=int(fits_header.get("OBSNUM", 0)),
                scan_number=int(fits_header.get("SCAN", 0)),
                ra=math.radians(fits_header.get("RA", 0.0)),
                dec=math.radians(fits_header.get("DEC", 0.0)),
                epoch=float(fits_header.get("EQUINOX", 2000.0)),
                offset_x=float(fits_header.get("OFFSETX", 0.0)),
                offset_y=float(fits_header.get("OFFSETY", 0.0)),
                integration_time=float(fits_header.get("OBSTIME", 0.0)),
                beam_efficiency=float(fits_header.get("BEAMEFF", 0.0)),
                reference_channel=float(fits_header.get("CRPIX1", 1.0)),
                reference_frequency=float(fits_header.get("RESTFREQ", 0.0)) * 1.0e-6,
                reference_velocity=float(fits_header.get("CRVAL1", 0.0)) * 1.0e-3,
                velocity_resolution=float(fits_header.get("CDELT1", 1.0e3)) * 1.0e-3,
                image_frequency=float(fits_header.get("IMAGFREQ", 0.0)) * 1.0e-6,
            )
        spectrum = Spectrum(
            x=numpy.arange(1, data.size + 1),
            intensity=data,
            xunit=XUnit.CHANNEL_NUMBER,
            metadata=metadata,
        )
        return cls.from_spectrum(spectrum)


def _galactic_to_equatorial(lon: float, lat: float) -> tuple[float, float]:
    coordinate = astropy.coordinates.SkyCoord(
        l=lon * astropy.units.rad, b=lat * astropy.units.rad, frame="galactic"
    ).fk5
    return float(coordinate.ra.rad), float(coordinate.dec.rad)
