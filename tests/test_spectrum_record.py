import numpy
import pytest

from gildas_spectral_pipeline import (
    ParameterKey as K,
    SPEED_OF_LIGHT,
    Spectrum,
    SpectrumHeader,
    SpectrumLine,
    SpectrumMetadata,
    SpectrumRecord,
    XUnit,
)

from conftest import CO_FREQUENCY, make_record


def test_nchan_follows_data():
    record = make_record(1)
    assert record.nchan == 16
    assert record.get(K.NCHAN).as_int() == 16
    record.data = numpy.zeros(10)
    assert record.get(K.NCHAN).as_int() == 10
    with pytest.raises(ValueError):
        SpectrumRecord(SpectrumHeader(), numpy.zeros(4), {"nchan": record.get(K.NCHAN)})


def test_channel_velocity_frequency():
    record = make_record(1)
    assert record.velocity(8.0) == 9.0
    assert record.velocity(10.0) == 10.0
    assert record.channel(10.0) == 10.0
    assert record.frequency(8.0) == pytest.approx(CO_FREQUENCY)
    fres = -0.5 * CO_FREQUENCY / SPEED_OF_LIGHT
    assert record.frequency_resolution == pytest.approx(fres)
    assert record.frequency(9.0) == pytest.approx(CO_FREQUENCY + fres)
    assert record.channel_for_frequency(record.frequency(3.0)) == pytest.approx(3.0)


def test_corrected_velocity():
    record = make_record(1)
    assert record.corrected_velocity(8.0) == pytest.approx(9.0)
    velocity = record.corrected_velocity(20.0)
    assert record.gildas_velocity_for_corrected_velocity(velocity) == pytest.approx(
        record.velocity(20.0), rel=1e-7
    )
    assert record.channel_width(CO_FREQUENCY) == pytest.approx(0.5, rel=1e-4)


def test_line_velocity_conversion():
    record = make_record(1)
    line = SpectrumLine(min_channel=3, max_channel=9, vel=20.0, width=2.0, peak=1.0)
    converted = record.to_gildas_velocity(record.to_corrected_velocity(line))
    assert converted.vel == pytest.approx(20.0, rel=1e-7)
    assert converted.width == pytest.approx(2.0, rel=1e-7)


def test_modify_rest_frequency_keeps_sky_frequencies():
    record = make_record(1)
    before = record.frequencies()
    record.modify_rest_frequency(CO_FREQUENCY + 10.0)
    assert record.reference_frequency == CO_FREQUENCY + 10.0
    numpy.testing.assert_allclose(record.frequencies(), before, rtol=0, atol=1e-6)
    assert record.velocity(record.reference_channel) == 9.0


def test_modify_reference_velocity_relabels():
    record = make_record(1)
    data = record.data.copy()
    record.modify_reference_velocity(-3.0)
    assert record.velocity(8.0) == -3.0
    numpy.testing.assert_array_equal(record.data, data)


def test_crop():
    record = make_record(0)
    record.crop(3, 10)
    assert record.nchan == 8
    assert record.data[0] == 2.0
    assert record.reference_channel == 6.0
    assert record.velocity(6.0) == 9.0


def test_resample_onto_other_grid():
    record = make_record(0, values=numpy.linspace(0.0, 1.5, 16))
    other = make_record(1, nchan=8, reference_channel=4.0, velocity_resolution=1.0)
    record.resample(other)
    assert record.nchan == 8
    assert record.reference_channel == 4.0
    assert record.velocity_resolution == 1.0
    assert record.reference_velocity == 9.0
    # channel 4 of `other` is channel 8 of the source record, value 0.7
    assert record.data[3] == pytest.approx(0.7, abs=1e-5)


def test_as_spectrum_and_back():
    record = make_record(5)
    spectrum = record.as_spectrum(XUnit.VELOCITY_KMS)
    assert spectrum.x[7] == pytest.approx(9.0)
    assert spectrum.metadata.observation_number == 5
    assert spectrum.metadata.source == "ORION"

    back = SpectrumRecord.from_spectrum(spectrum)
    numpy.testing.assert_allclose(back.data, record.data)
    assert back.velocity(8.0) == pytest.approx(9.0)


def test_from_spectrum_with_non_integer_channels(loguru_messages):
    metadata = SpectrumMetadata(
        reference_channel=1.0,
        reference_frequency=CO_FREQUENCY,
        reference_velocity=0.0,
        velocity_resolution=1.0,
    )
    velocities = numpy.arange(20) + 0.5
    spectrum = Spectrum(
        x=velocities,
        intensity=2.0 * velocities,
        xunit=XUnit.VELOCITY_KMS,
        metadata=metadata,
    )
    record = SpectrumRecord.from_spectrum(spectrum)
    assert any("resampled" in message for message in loguru_messages)
    numpy.testing.assert_allclose(
        record.data, 2.0 * record.velocities(), rtol=1e-5, atol=1e-4
    )


def test_fits_round_trip(tmp_path):
    record = make_record(3)
    path = tmp_path / "spectrum.fits"
    record.to_fits(path)
    back = SpectrumRecord.from_fits(path)
    numpy.testing.assert_array_equal(back.data, record.data)
    assert back.reference_channel == pytest.approx(8.0)
    assert back.velocity_resolution == pytest.approx(0.5)
    assert back.reference_frequency == pytest.approx(CO_FREQUENCY)
    assert back.header.num == 3
    assert back.header.source == "ORION"


def test_velocity_for_rest_frequency():
    record = make_record(1)
    frequencies = record.frequencies()
    numpy.testing.assert_allclose(
        record.velocity_for_rest_frequency(frequencies, record.reference_frequency),
        record.velocities(),
    )
    shifted = record.reference_frequency + record.frequency_resolution
    assert record.velocity_for_rest_frequency(
        record.reference_frequency, shifted
    ) == pytest.approx(record.reference_velocity - record.velocity_resolution)


def test_from_empty_spectrum():
    spectrum = Spectrum(x=[], intensity=[], metadata=SpectrumMetadata())
    with pytest.raises(ValueError, match="without channels"):
        SpectrumRecord.from_spectrum(spectrum)
