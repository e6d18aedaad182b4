import argparse
import math

import numpy
import pytest

from gildas_spectral_pipeline import (
    LineFittingEngine,
    ParameterKey as K,
    Spectrum,
    SpectrumContainer,
    SpectrumLine,
    SpectrumMetadata,
    SpectrumRecord,
    XUnit,
    fix_bad_channels,
    write_container,
)

from conftest import CO_FREQUENCY, make_record

FWHM_FACTOR = 2.0 * math.sqrt(2.0 * math.log(2.0))


def gaussian_record(
    noise: bool = True, nchan: int = 64, lines=((32.0, 2.0, 5.0),)
) -> SpectrumRecord:
    """Lines are (channel, width in channels, peak); velocity is channel - 32."""
    channels = numpy.arange(1, nchan + 1, dtype=numpy.float64)
    values = numpy.zeros(nchan)
    for center, width, peak in lines:
        sd = width / FWHM_FACTOR
        values += peak * numpy.exp(-0.5 * ((channels - center) / sd) ** 2)
    if noise:
        values += 0.05 * numpy.sin(1.7 * channels) + 0.03 * numpy.cos(2.9 * channels)
    metadata = SpectrumMetadata(
        source="ORION",
        line="CO",
        backend="30M",
        observation_number=1,
        reference_channel=32.0,
        reference_frequency=CO_FREQUENCY,
        reference_velocity=0.0,
        velocity_resolution=1.0,
    )
    spectrum = Spectrum(
        x=channels, intensity=values, xunit=XUnit.CHANNEL_NUMBER, metadata=metadata
    )
    return SpectrumRecord.from_spectrum(spectrum)


def test_fix_bad_channels():
    numpy.testing.assert_allclose(
        fix_bad_channels([1.0, numpy.nan, 3.0, 4.0]), [1.0, 2.0, 3.0, 4.0]
    )
    numpy.testing.assert_allclose(
        fix_bad_channels([1.0, -1000.0, -1000.0, 4.0]), [1.0, 0.0, 0.0, 4.0]
    )
    numpy.testing.assert_allclose(
        fix_bad_channels([1.0, -500.0, -500.0, 4.0]), [1.0, 2.0, 3.0, 4.0]
    )
    numpy.testing.assert_allclose(
        fix_bad_channels([-500.0, 2.0, 3.0, -500.0]), [0.0, 2.0, 3.0, 0.0]
    )


def test_fit_line_between_channels():
    engine = LineFittingEngine()
    processor = engine.processor(gaussian_record(noise=False))
    fit = processor.fit_line_between_channels(20, 44)
    assert fit[0] == pytest.approx(0.0, abs=1e-3)
    assert fit[1] == pytest.approx(2.0, rel=1e-3)
    assert fit[2] == pytest.approx(5.0, rel=1e-3)
    assert fit[3] == pytest.approx(5.0 * 2.0 * 1.064467, rel=1e-3)
    assert fit[10] == pytest.approx(CO_FREQUENCY)


def test_fit_lines_finds_the_line():
    engine = LineFittingEngine()
    processor = engine.processor(gaussian_record())
    fits = processor.fit_lines()
    assert len(fits) == 1
    assert fits[0][0] == pytest.approx(0.0, abs=0.1)
    assert fits[0][2] == pytest.approx(5.0, abs=0.2)
    assert processor.fit_lines(max_lines=0) == []


def assert_recovered(fits, expected, vel_tol, width_tol, peak_tol):
    """Match each (velocity, width, peak) with the nearest fitted line."""
    for vel, width, peak in expected:
        fit = min(fits, key=lambda f: abs(f[0] - vel))
        assert fit[0] == pytest.approx(vel, abs=vel_tol)
        assert fit[1] == pytest.approx(width, rel=width_tol)
        assert fit[2] == pytest.approx(peak, abs=peak_tol)


def test_fit_lines_finds_separated_lines():
    record = gaussian_record(nchan=256, lines=((40.0, 3.0, 5.0), (150.0, 4.0, 3.0)))
    processor = LineFittingEngine().processor(record)
    fits = processor.fit_lines()
    assert len(fits) == 2
    assert_recovered(fits, [(8.0, 3.0, 5.0), (118.0, 4.0, 3.0)], 0.2, 0.15, 0.3)

    profiles = sum(processor.gaussian_profile(fit) for fit in fits)
    numpy.testing.assert_allclose(
        processor.residual, processor.values - profiles, atol=1e-9
    )


def test_reduce_separates_blended_lines():
    record = gaussian_record(nchan=256, lines=((120.0, 4.0, 5.0), (126.0, 4.0, 3.0)))
    result = LineFittingEngine().reduce(record)
    assert len(result.lines) >= 2
    fits = [line.gaussian_parameters() for line in result.lines]
    assert_recovered(fits, [(88.0, 4.0, 5.0), (94.0, 4.0, 3.0)], 0.5, 0.25, 0.5)


def test_unfittable_features_stay_in_the_residual(monkeypatch):
    record = gaussian_record(nchan=128, lines=((40.0, 3.0, 5.0), (90.0, 3.0, 4.0)))
    processor = LineFittingEngine().processor(record)

    def narrow_fit(values, sigma, start, end):
        index = start + int(numpy.argmax(numpy.abs(values[start:end])))
        fit = [0.0] * 11
        fit[0] = float(record.velocity(index + 1))
        fit[1] = 0.01
        fit[2] = float(values[index])
        return fit

    monkeypatch.setattr(processor, "_fit_greatest_line", narrow_fit)
    assert processor.fit_lines() == []
    numpy.testing.assert_allclose(processor.residual, processor.values, atol=1e-12)


def test_remove_spikes():
    record = gaussian_record()
    values = 0.1 * numpy.sin(1.3 * numpy.arange(64))
    values[20] = 100.0
    values[40] = -50.0
    record.data = values
    processor = LineFittingEngine().processor(record)
    initial = processor.values.copy()

    assert processor.remove_spikes() == [20, 40]
    assert processor.values[20] == pytest.approx(initial[[18, 19, 21, 22]].mean())
    assert processor.values[40] == pytest.approx(initial[[38, 39, 41, 42]].mean())
    untouched = numpy.ones(64, dtype=bool)
    untouched[[20, 40]] = False
    numpy.testing.assert_array_equal(processor.values[untouched], initial[untouched])


def window_mean(values, half_window):
    return numpy.array(
        [
            values[max(i - half_window, 0) : i + half_window + 1].mean()
            for i in range(values.size)
        ]
    )


def test_smoothed_residual_is_a_window_mean():
    record = gaussian_record()
    channels = numpy.arange(64)
    record.data = 1.0 + 0.01 * channels + 0.05 * numpy.sin(1.7 * channels)
    processor = LineFittingEngine().processor(record)
    values = processor.values.copy()

    baseline = processor.smoothed_residual(4)
    expected = window_mean(values, 4)
    numpy.testing.assert_allclose(baseline, expected, atol=1e-12)
    assert baseline[0] == pytest.approx(values[:5].mean())
    assert baseline[-1] == pytest.approx(values[-5:].mean())
    numpy.testing.assert_allclose(
        processor.smoothed_residual(4, values), values - expected, atol=1e-10
    )
    numpy.testing.assert_array_equal(processor.smoothed_residual(0), values)


def test_smoothed_residual_keeps_spike_channels():
    record = gaussian_record()
    values = 0.05 * numpy.sin(1.7 * numpy.arange(64))
    values[30] = 100.0
    record.data = values
    processor = LineFittingEngine().processor(record)
    initial = processor.values.copy()

    baseline = processor.smoothed_residual(3)
    expected = window_mean(processor.values, 3)
    assert baseline[30] == pytest.approx(initial[30] - expected[30])
    others = numpy.arange(64) != 30
    numpy.testing.assert_allclose(baseline[others], expected[others], atol=1e-12)


def test_clip_lines():
    record = gaussian_record(noise=False)
    processor = LineFittingEngine().processor(record)
    line = SpectrumLine.from_gaussian_parameters(
        processor.fit_line_between_channels(20, 44)
    )
    assert (line.min_channel, line.max_channel) == (20, 44)

    clipped = processor.clip_lines([line])
    assert numpy.max(numpy.abs(clipped)) < 1e-2
    steps = numpy.diff(clipped[20:45])
    numpy.testing.assert_allclose(steps, steps[0], atol=1e-12)
    assert processor.clip_lines([]) is processor.values


def test_fix_level0_uses_the_mean():
    record = gaussian_record()
    record.data = [0.0] * 7 + [10.0] * 3
    processor = LineFittingEngine().processor(record)
    processor.fix_level0()
    # the central channel (index 5) is left out of the mean
    numpy.testing.assert_allclose(
        processor.values, numpy.array([0.0] * 7 + [10.0] * 3) - 30.0 / 9.0
    )


def test_reduce_linear_baseline():
    record = gaussian_record()
    ramp = 2.0 + 0.1 * numpy.arange(64)
    record.data = ramp
    reduced = LineFittingEngine().reduce_linear_baseline(record, 3)
    numpy.testing.assert_allclose(reduced, 0.0, atol=1e-5)
    numpy.testing.assert_allclose(record.data, ramp, rtol=1e-6)


def test_reduce_baseline_protects_the_line_window():
    record = gaussian_record()
    index = numpy.arange(64)
    ramp = 2.0 + 0.1 * index
    record.data = ramp + 5.0 * numpy.exp(-0.5 * ((index - 30) / 1.5) ** 2)
    engine = LineFittingEngine()

    reduced = engine.reduce_baseline(record, 3, 24, 36)
    assert reduced[30] == pytest.approx(5.0, abs=0.01)
    assert reduced[24] == pytest.approx(0.0, abs=1e-5)
    assert reduced[36] == pytest.approx(0.0, abs=1e-5)
    numpy.testing.assert_allclose(reduced[4:15], 0.0, atol=1e-5)
    numpy.testing.assert_allclose(reduced[45:60], 0.0, atol=1e-5)
    numpy.testing.assert_allclose(reduced[:4], ramp[:4] - ramp[3], atol=1e-5)
    numpy.testing.assert_allclose(reduced[60:], ramp[60:] - ramp[59], atol=1e-5)

    with pytest.raises(ValueError):
        engine.reduce_baseline(record, 3, 36, 24)
    record.data = numpy.ones(5)
    with pytest.raises(ValueError):
        engine.reduce_baseline(record, 3)


def test_reduce():
    record = gaussian_record()
    data = record.data.copy()
    result = LineFittingEngine().reduce(record)

    numpy.testing.assert_array_equal(record.data, data)
    assert len(result.lines) >= 1
    strongest = max(result.lines, key=lambda line: abs(line.peak))
    assert strongest.vel == pytest.approx(0.0, abs=0.2)
    assert strongest.peak == pytest.approx(5.0, abs=0.3)
    assert strongest.fitted
    assert strongest.label == "Fit to line 1"
    assert result.processed.shape == (64,)
    assert result.sigma < 0.5
    assert numpy.max(numpy.abs(result.residual)) < 1.0


def test_flat_spectrum_has_no_lines():
    record = gaussian_record()
    record.data = 0.05 * numpy.sin(1.7 * numpy.arange(64))
    result = LineFittingEngine().reduce(record)
    assert result.lines == []


def test_options():
    options = LineFittingEngine.Options.from_dict(
        {"times_sigma": 4.5, "max_fit_evaluations": "many", "unrelated": 1}
    )
    assert options.times_sigma == 4.5
    assert options.max_fit_evaluations == 3000

    namespace = argparse.Namespace(times_sigma=2.0, max_lines=3)
    assert LineFittingEngine.Options.from_namespace(namespace).times_sigma == 2.0


def test_refinement_iterations():
    assert LineFittingEngine.refinement_iterations(10) == 10
    assert LineFittingEngine.refinement_iterations(50) == 3
    assert LineFittingEngine.refinement_iterations(100) == 2
    assert LineFittingEngine.refinement_iterations(200) == 0


def test_sum_spectra(tmp_path):
    path = tmp_path / "sum.30m"
    write_container(
        path,
        [
            make_record(1, values=numpy.ones(16), integration_time=60.0),
            make_record(2, values=3.0 * numpy.ones(16), integration_time=120.0),
            make_record(3, values=numpy.ones(16), line="13CO"),
            make_record(4, values=numpy.ones(16), offset_x=30.0),
        ],
    )
    engine = LineFittingEngine()
    with SpectrumContainer(path) as container:
        summed = engine.sum_spectra([container], "orion", "co", 0.0, 0.0, "30m")
        assert engine.sum_spectra([container], "ORION", "HCN", 0.0, 0.0, "30M") is None
        single = engine.sum_spectra([container], "ORION", "CO", 30.0, 0.0, "30M")

    numpy.testing.assert_allclose(summed.data, 1.25)
    assert summed.value(K.INTEG) == 180.0
    assert summed.header.num == 0
    assert single.header.num == 4


class FakeCatalog:
    def query(self, frequency, width, max_energy, min_intensity):
        return ["CO v=0", "HNCO"]


def test_identify_lines():
    options = LineFittingEngine.Options.from_dict({"excluded_species": ("HNCO",)})
    engine = LineFittingEngine(options)
    line = SpectrumLine(min_channel=1, max_channel=5, freq=CO_FREQUENCY, width=2.0)
    assert engine.identify_lines([line], FakeCatalog()) == [["CO v=0"]]
    assert line.label == "CO v=0"
