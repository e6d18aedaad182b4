import sys

import loguru
import numpy
import pytest

from gildas_spectral_pipeline import (
    CubeRecord,
    Spectrum,
    SpectrumMetadata,
    SpectrumRecord,
    XUnit,
    write_container,
)
from gildas_spectral_pipeline.utils import ARCSEC_TO_RAD

CO_FREQUENCY = 115271.2018
PIXEL = 2.0 * ARCSEC_TO_RAD


def make_record(
    number: int,
    values=None,
    nchan: int = 16,
    source: str = "ORION",
    line: str = "CO",
    backend: str = "30M",
    offset_x: float = 0.0,
    integration_time: float = 60.0,
    reference_channel: float = 8.0,
    velocity_resolution: float = 0.5,
) -> SpectrumRecord:
    if values is None:
        values = numpy.arange(nchan, dtype=numpy.float32) + number
    values = numpy.asarray(values, dtype=numpy.float32)
    metadata = SpectrumMetadata(
        source=source,
        line=line,
        backend=backend,
        observation_number=number,
        scan_number=number * 10,
        ra=1.2,
        dec=-0.1,
        offset_x=offset_x,
        integration_time=integration_time,
        sigma_rms=0.05,
        reference_channel=reference_channel,
        reference_frequency=CO_FREQUENCY,
        reference_velocity=9.0,
        velocity_resolution=velocity_resolution,
    )
    spectrum = Spectrum(
        x=numpy.arange(1, values.size + 1),
        intensity=values,
        xunit=XUnit.CHANNEL_NUMBER,
        metadata=metadata,
    )
    return SpectrumRecord.from_spectrum(spectrum)


@pytest.fixture
def records() -> list[SpectrumRecord]:
    return [make_record(10), make_record(7, nchan=200), make_record(22, line="13CO")]


@pytest.fixture
def container_path(tmp_path, records):
    path = tmp_path / "observations.30m"
    write_container(path, records)
    return path


def make_volume(nx: int = 4, ny: int = 5, nz: int = 6) -> numpy.ndarray:
    k, y, x = numpy.mgrid[0:nz, 0:ny, 0:nx]
    return (k + 10.0 * y + 100.0 * x).astype(numpy.float32)


def make_cube(volume=None, **fields) -> CubeRecord:
    volume = make_volume() if volume is None else volume
    values = dict(
        source="ORION",
        line="CO",
        rest_frequency=CO_FREQUENCY,
        velocity_resolution=0.5,
        velocity_offset=-2.0,
        beam_major=10.0 * ARCSEC_TO_RAD,
        beam_minor=10.0 * ARCSEC_TO_RAD,
        noise=0.1,
        rms=0.1,
    )
    values.update(fields)
    formula = [2.5, 0.0, -PIXEL, 3.0, 0.0, PIXEL, 1.0, -2.0, 0.5]
    return CubeRecord.from_volume(volume, formula, **values)


@pytest.fixture
def cube() -> CubeRecord:
    return make_cube()


@pytest.fixture
def loguru_messages():
    messages: list[str] = []
    handler = loguru.logger.add(messages.append, format="{level} {message}")
    yield messages
    loguru.logger.remove(handler)


@pytest.fixture(autouse=True)
def restore_loguru():
    yield
    loguru.logger.remove()
    loguru.logger.add(sys.stderr)
