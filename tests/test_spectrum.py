import numpy
import pytest

from gildas_spectral_pipeline import Spectrum, SpectrumMetadata, XUnit


def test_x_units():
    assert XUnit("MHz").is_frequency
    assert not XUnit.VELOCITY_KMS.is_frequency
    assert XUnit.FREQUENCY_GHZ.to_mhz == 1e3
    assert XUnit.FREQUENCY_HZ.to_mhz == 1e-6


def test_shapes_must_match():
    with pytest.raises(ValueError):
        Spectrum(x=[1, 2, 3], intensity=[1, 2])


def test_arithmetic_propagates_noise():
    a = Spectrum(x=[1, 2], intensity=[1.0, 2.0], noise=[3.0, 3.0])
    b = Spectrum(x=[1, 2], intensity=[1.0, 1.0], noise=[4.0, 4.0])
    total = a + b
    numpy.testing.assert_allclose(total.intensity, [2.0, 3.0])
    numpy.testing.assert_allclose(total.noise, [5.0, 5.0])

    scaled = -2 * a
    numpy.testing.assert_allclose(scaled.intensity, [-2.0, -4.0])
    numpy.testing.assert_allclose(scaled.noise, [6.0, 6.0])
    numpy.testing.assert_allclose((1 - a).intensity, [0.0, -1.0])
    numpy.testing.assert_allclose((a / 2).intensity, [0.5, 1.0])
    assert (a + b).metadata is not a.metadata


def test_moving_average():
    spectrum = Spectrum(x=numpy.arange(5), intensity=[1.0, 2.0, 3.0, 4.0, 5.0])
    averaged = spectrum.get_moving_averaged_spectrum(1)
    numpy.testing.assert_allclose(averaged.intensity, [1.5, 2.0, 3.0, 4.0, 4.5])
    assert averaged.noise is None


def test_moving_average_fills_nan():
    spectrum = Spectrum(x=numpy.arange(3), intensity=[1.0, numpy.nan, 3.0])
    numpy.testing.assert_allclose(
        spectrum.get_moving_averaged_spectrum(1).intensity, [1.0, 2.0, 3.0]
    )


def test_rms():
    spectrum = Spectrum(x=numpy.arange(4), intensity=[3.0, -3.0, 3.0, numpy.nan])
    assert spectrum.rms() == pytest.approx(3.0)
    flat = Spectrum(x=numpy.arange(20), intensity=numpy.full(20, 7.0))
    assert flat.rms(half_moving_window=3) == pytest.approx(0.0)


def test_sort_by():
    spectrum = Spectrum(x=[3.0, 1.0, 2.0], intensity=[30.0, 10.0, 20.0])
    assert not spectrum.is_sorted_by("x")
    spectrum.sort_by("x")
    numpy.testing.assert_array_equal(spectrum.x, [1.0, 2.0, 3.0])
    numpy.testing.assert_array_equal(spectrum.intensity, [10.0, 20.0, 30.0])

    descending = Spectrum(x=[3.0, 2.0, 1.0], intensity=[1.0, 2.0, 3.0])
    descending.sort_by("x")
    numpy.testing.assert_array_equal(descending.intensity, [3.0, 2.0, 1.0])


def test_sort_by_unknown_field(loguru_messages):
    spectrum = Spectrum(x=[2.0, 1.0], intensity=[1.0, 2.0])
    spectrum.sort_by("frequency")
    numpy.testing.assert_array_equal(spectrum.x, [2.0, 1.0])
    assert any("no such column" in message for message in loguru_messages)


def test_npz_and_txt_files(tmp_path):
    spectrum = Spectrum(
        x=[1.0, 2.0, 3.0],
        intensity=[0.5, 0.25, 0.125],
        metadata=SpectrumMetadata(source="ORION"),
    )
    spectrum.to_npz(tmp_path / "spectrum.npz")
    back = Spectrum.from_npz(tmp_path / "spectrum.npz")
    numpy.testing.assert_array_equal(back.x, spectrum.x)
    numpy.testing.assert_array_equal(back.intensity, spectrum.intensity)
    assert back.noise is None

    spectrum.to_txt(tmp_path / "spectrum.txt")
    back = Spectrum.from_txt(tmp_path / "spectrum.txt")
    numpy.testing.assert_allclose(back.intensity, spectrum.intensity)


def test_from_callable():
    spectrum = Spectrum(x=[1.0, 2.0], intensity=[0.0, 0.0])
    numpy.testing.assert_allclose(spectrum.from_callable(lambda x: 2 * x).intensity, [2.0, 4.0])
