import argparse
import dataclasses
import math
import typing
import warnings
from typing_extensions import Self

import loguru
import numpy
import numpy.typing
import scipy.optimize  # type: ignore

from .errors import FitDivergence
from .parameter import DataKind, ParameterKey as K
from .spectrum_header import SpectrumHeader
from .spectrum_line import GAUSSIAN_AREA_FACTOR, SpectrumLine
from .spectrum_record import SPEED_OF_LIGHT, SpectrumRecord
from .utils import ARCSEC_TO_RAD, centered_move_mean

__all__ = [
    "LineCatalog",
    "LineFittingEngine",
    "ReductionResult",
    "SpectrumProcessor",
    "fix_bad_channels",
]

FWHM_FACTOR = 2.0 * math.sqrt(2.0 * math.log(2.0))
BLANK_CHANNEL = -1000.0
MAX_CHANNELS_FOR_RUN_REPAIR = 30000

GaussianParameters = list[float]


class LineCatalog(typing.Protocol):
    def query(
        self,
        frequency: float,
        width: float,
        max_energy: float,
        min_intensity: float,
    ) -> list[str]:
        """Species names with a transition within `frequency +/- width / 2` MHz."""
        ...


@dataclasses.dataclass
class ReductionResult:
    lines: list[SpectrumLine]
    processed: numpy.typing.NDArray[numpy.floating]
    residual: numpy.typing.NDArray[numpy.floating]
    baseline: numpy.typing.NDArray[numpy.floating]
    sigma: float


def _sigma(values: numpy.typing.NDArray[numpy.floating]) -> float:
    return float(numpy.std(values))


def _rms(values: numpy.typing.NDArray[numpy.floating]) -> float:
    return float(numpy.sqrt(numpy.mean(numpy.square(values))))


def _mean_around(
    values: numpy.typing.NDArray[numpy.floating], index: int, half_width: int
) -> float:
    """Mean of the `half_width` neighbours on each side of `index`, excluding it."""
    left = values[max(index - half_width, 0) : index]
    right = values[index + 1 : index + half_width + 1]
    neighbours = numpy.concatenate([left, right])
    if neighbours.size == 0:
        return 0.0
    return float(numpy.mean(neighbours))


def _gaussian(x, mean, sd, integral):
    return integral / (sd * math.sqrt(2.0 * math.pi)) * numpy.exp(
        -0.5 * numpy.square((x - mean) / sd)
    )


def fix_bad_channels(
    values: numpy.typing.ArrayLike, threshold: float = -100.0
) -> numpy.typing.NDArray[numpy.floating]:
    """Repair blanked and hugely negative channels.

    A single NaN or -1000 channel becomes the mean of its two neighbours, and a
    run of them becomes zero. Runs below `threshold` are linearly interpolated
    between the channels around them, or zeroed when they reach the end of the
    spectrum.
    """
    values = numpy.array(values, dtype=numpy.float64)
    size = values.size
    bad = numpy.isnan(values) | (values == BLANK_CHANNEL)
    i = 0
    while i < size:
        if not bad[i]:
            i += 1
            continue
        j = i
        while j < size and bad[j]:
            j += 1
        if j - i > 1:
            values[i:j] = 0.0
        else:
            neighbours = [
                values[k] for k in (i - 1, i + 1) if 0 <= k < size and not bad[k]
            ]
            values[i] = float(numpy.mean(neighbours)) if neighbours else 0.0
        i = j

    if size > MAX_CHANNELS_FOR_RUN_REPAIR:
        return values

    i = 0
    while i < size:
        if values[i] >= threshold:
            i += 1
            continue
        if i == 0:
            values[i] = 0.0
            i += 1
            continue
        j = i
        while j < size and values[j] < threshold:
            j += 1
        if j == size:
            values[i:] = 0.0
            break
        start, stop = values[i - 1], values[j]
        steps = numpy.arange(1, j - i + 1, dtype=numpy.float64) / (j - i + 1)
        values[i:j] = start + (stop - start) * steps
        i = j
    return values


class SpectrumProcessor:
    """Working copy of one spectrum while lines are found and removed.

    `values` holds the processed intensities (index 0 is channel 1) and
    `residual` what is left after the last fit. Channel bounds of fitted lines are
    array indices into `values`.
    """

    record: SpectrumRecord
    values: numpy.typing.NDArray[numpy.floating]
    residual: numpy.typing.NDArray[numpy.floating] | None

    def __init__(self, record: SpectrumRecord, options: "LineFittingEngine.Options"):
        self.record = record
        self.options = options
        self.values = fix_bad_channels(record.data, options.bad_channel_threshold)
        self.residual = None
        self.vres = record.velocity_resolution

    def fix_level0(self):
        """Subtract the continuum level, taken as the mean of every channel but
        the central one."""
        size = self.values.size
        self.values = self.values - _mean_around(self.values, size // 2, size // 2 + 1)

    def subtract_smoothed_baseline(
        self,
        half_window: int,
        line_start: int | None = None,
        line_end: int | None = None,
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Remove a moving-mean baseline over 2 * half_window + 1 channels.

        The first and last half_window + 1 channels take the nearest mean that
        needs no clipping. Between the indices `line_start` and `line_end`
        (inclusive) the straight segment joining the two end channels is
        subtracted instead.
        """
        values = self.values
        size = values.size
        if size < 2 * half_window + 2:
            raise ValueError(
                f"{size} channels are too few for a baseline window of {half_window}."
            )
        baseline = centered_move_mean(values, half_window)
        baseline[: half_window + 1] = baseline[half_window]
        baseline[size - 1 - half_window :] = baseline[size - half_window - 2]
        if line_start is not None and line_end is not None:
            if not 0 <= line_start < line_end < size:
                raise ValueError(f"Invalid line window {line_start}-{line_end}.")
            start, stop = values[line_start], values[line_end]
            steps = numpy.arange(line_end - line_start + 1) / (line_end - line_start)
            baseline[line_start : line_end + 1] = start + (stop - start) * steps
        self.values = values - baseline
        return self.values

    def subtract_linear_baseline(
        self, half_window: int
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Remove the straight line through the means of the first and the last
        2 * half_window + 1 channels."""
        values = self.values
        size = values.size
        width = 2 * half_window + 1
        if size < width:
            raise ValueError(
                f"{size} channels are too few for a baseline window of {half_window}."
            )
        first = float(numpy.mean(values[:width]))
        last = float(numpy.mean(values[size - width :]))
        span = (size - 1 - half_window) - half_window
        slope = (last - first) / span if span > 0 else 0.0
        self.values = values - (first + slope * (numpy.arange(size) - half_window))
        return self.values

    def gaussian_profile(
        self, line: SpectrumLine | typing.Sequence[float]
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Intensity of `line` at every channel of the spectrum."""
        parameters = (
            line.gaussian_parameters() if isinstance(line, SpectrumLine) else line
        )
        if parameters[1] == 0 or self.vres == 0:
            return numpy.zeros(self.values.size)
        center = self.record.channel(parameters[0])
        sd = parameters[1] / (self.vres * FWHM_FACTOR)
        channels = numpy.arange(1, self.values.size + 1, dtype=numpy.float64)
        return parameters[2] * numpy.exp(-0.5 * numpy.square((channels - center) / sd))

    def remove_line(
        self,
        values: numpy.typing.NDArray[numpy.floating],
        line: SpectrumLine | typing.Sequence[float],
    ):
        values -= self.gaussian_profile(line)

    def remove_spikes(self) -> list[int]:
        """Replace isolated spikes and dips by the mean around them.

        Returns:
            list[int]: Indices of the replaced channels.
        """
        values = self.values
        replaced = []
        for _ in range(values.size):
            sigma = _sigma(values)
            index = int(numpy.argmax(values))
            mean_around = _mean_around(values, index, 2)
            if values[index] > 3.0 * sigma and values[index] > 20.0 * mean_around:
                values[index] = mean_around
                replaced.append(index)
                continue
            break
        for _ in range(values.size):
            sigma = _sigma(values)
            index = int(numpy.argmin(values))
            mean_around = _mean_around(values, index, 2)
            if abs(values[index]) > 3.0 * sigma and abs(values[index]) > 3.0 * abs(
                mean_around
            ):
                values[index] = mean_around
                replaced.append(index)
                continue
            break
        return replaced

    def smoothed_residual(
        self,
        half_window: int,
        data: numpy.typing.NDArray[numpy.floating] | None = None,
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Smooth the residual into a baseline and subtract it from `data`.

        Spikes are removed first. Their channels keep their own residual instead
        of the smoothed one. When `data` is None the baseline itself is returned.
        """
        if self.residual is None:
            self.residual = self.values.copy()
        if half_window == 0:
            return self.residual.copy()

        spikes = numpy.zeros(self.values.size, dtype=bool)
        spikes[self.remove_spikes()] = True
        baseline = numpy.zeros(self.values.size)
        if half_window > 0:
            mean = centered_move_mean(self.values, half_window)
            baseline = numpy.where(spikes, self.residual - mean, mean)

        if data is None:
            return baseline
        return data - baseline

    def clip_lines(
        self, lines: list[SpectrumLine]
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Replace the channels of each line by a straight segment joining the
        smoothed spectrum on both sides."""
        if not lines:
            return self.values
        for line in lines:
            self.remove_line(self.values, line)
        smoothed = self.smoothed_residual(5)
        size = smoothed.size
        for line in lines:
            low, high = line.min_channel, line.max_channel
            if low == high == 0:
                low = int(self.record.channel(line.vel - 2.0 * line.width))
                high = int(self.record.channel(line.vel + 2.0 * line.width))
                low, high = min(low, high), max(low, high)
            low, high = max(low, 0), min(high, size - 1)
            start = smoothed[low - 1] if low > 0 else 0.0
            stop = smoothed[high + 1] if high < size - 1 else 0.0
            if high > low:
                steps = numpy.arange(high - low + 1, dtype=numpy.float64) / (high - low)
                smoothed[low : high + 1] = start + (stop - start) * steps
        self.values = smoothed
        return smoothed

    @staticmethod
    def _line_limits(
        values: numpy.typing.NDArray[numpy.floating], sigma: float
    ) -> tuple[float, int, int] | None:
        """Extremum and channel window of the strongest positive feature."""
        size = values.size
        peak_index = int(numpy.argmax(values))
        peak = values[peak_index]

        n = peak_index + 1
        if n >= size - 1:
            return None
        while True:
            n += 1
            slope = values[n] - values[n - 1]
            deviation = abs(peak - values[n])
            if deviation > 8.0 * sigma and slope >= 0.0:
                break
            if not ((slope < 0.0 or deviation < 3.0 * sigma) and n < size - 1):
                break
        end = min(n + 1, size - 1)

        n = peak_index - 1
        if n < 1:
            return None
        while True:
            n -= 1
            slope = values[n] - values[n + 1]
            deviation = abs(peak - values[n])
            if deviation > 8.0 * sigma and slope >= 0.0:
                break
            if not ((slope < 0.0 or deviation < 3.0 * sigma) and n > 0):
                break
        start = max(n, 0)
        return float(peak), start, end

    def _fit_greatest_line(
        self,
        values: numpy.typing.NDArray[numpy.floating],
        sigma: float,
        start: int,
        end: int,
    ) -> GaussianParameters:
        """Fit a Gaussian to the feature between `start` and `end`.

        Raises:
            FitDivergence: The least-squares fit failed or gave non-finite values.

        Returns:
            GaussianParameters: Velocity, width, peak, area, their errors, the
                window bounds and the frequency.
        """
        times_sigma = self.options.times_sigma
        padding = self.options.baseline_padding
        width = max(end - start, 2)
        low = max(start - 2 * width, 0)
        high = min(end + 2 * width, values.size - 1)
        window = numpy.concatenate(
            [numpy.zeros(padding), values[low : high + 1], numpy.zeros(padding)]
        )

        maximum, minimum = float(numpy.max(window)), float(numpy.min(window))
        negative = (
            minimum < 0
            and maximum >= 0
            and -minimum > 1.5 * maximum
            and -minimum > times_sigma * sigma
        )
        if negative:
            window = -window

        x = numpy.arange(1, window.size + 1, dtype=numpy.float64)
        error = numpy.full(window.size, sigma if sigma > 0 else 1.0)
        peak_guess = float(numpy.max(window))
        sd_guess = max(numpy.count_nonzero(window >= 0.5 * peak_guess) / FWHM_FACTOR, 0.5)
        initial = [
            float(x[int(numpy.argmax(window))]),
            sd_guess,
            peak_guess * sd_guess * math.sqrt(2.0 * math.pi),
        ]
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", scipy.optimize.OptimizeWarning)
                estimate, covariance = scipy.optimize.curve_fit(
                    _gaussian,
                    x,
                    window,
                    p0=initial,
                    sigma=error,
                    absolute_sigma=True,
                    maxfev=self.options.max_fit_evaluations,
                )
        except (RuntimeError, ValueError) as e:
            raise FitDivergence(f"Gaussian fit between {start} and {end} failed: {e}")
        if not numpy.all(numpy.isfinite(estimate)):
            raise FitDivergence(
                f"Gaussian fit between {start} and {end} gave {estimate = }."
            )
        with numpy.errstate(invalid="ignore"):
            uncertainty = numpy.sqrt(numpy.diag(covariance))
        uncertainty = numpy.where(numpy.isfinite(uncertainty), uncertainty, numpy.nan)

        mean, sd, integral = estimate
        dmean, dsd, dintegral = uncertainty
        mean += low - padding
        sd = abs(sd)
        abs_vres = abs(self.vres)
        peak = integral / (sd * math.sqrt(2.0 * math.pi))
        with numpy.errstate(divide="ignore", invalid="ignore"):
            peak_error = abs(peak) * math.hypot(dintegral / integral, dsd / sd)

        result = [
            float(self.record.velocity(mean)),
            sd * FWHM_FACTOR * abs_vres,
            peak,
            integral * abs_vres,
            abs(dmean * abs_vres),
            abs(dsd * FWHM_FACTOR * abs_vres),
            peak_error,
            abs(dintegral * abs_vres),
            float(start),
            float(end),
            float(self.record.frequency(mean)),
        ]
        self._repair_errors(result, sigma)

        if negative:
            result[2] = -abs(result[2])
            result[3] = -abs(result[3])
        for i in range(4, 8):
            result[i] = abs(result[i])
        return result

    def _repair_errors(self, result: GaussianParameters, sigma: float):
        _, width, peak, area, _, width_error, peak_error, area_error = result[:8]
        nan = math.isnan
        if nan(width_error) and not nan(peak_error) and not nan(area_error):
            result[5] = _quotient_error(area, area_error, peak, peak_error)
            result[5] /= GAUSSIAN_AREA_FACTOR
        if nan(peak_error) and not nan(width_error) and not nan(area_error):
            result[6] = _quotient_error(area, area_error, width, width_error)
            result[6] /= GAUSSIAN_AREA_FACTOR
        if nan(area_error) and not nan(peak_error) and not nan(width_error):
            result[7] = (
                math.hypot(width_error * peak, width * peak_error) * GAUSSIAN_AREA_FACTOR
            )

        min_area_error = sigma * math.sqrt(abs(width / self.vres))
        min_peak_error = sigma
        min_width_error = (
            abs(_quotient_error(area, min_area_error, peak, min_peak_error))
            / GAUSSIAN_AREA_FACTOR
        )
        if nan(result[4]):
            result[4] = abs(self.vres) * 0.5
        if nan(result[6]) or result[6] < min_peak_error:
            result[6] = min_peak_error
        if nan(result[7]) or result[7] < min_area_error:
            result[7] = min_area_error
        if nan(result[5]) or result[5] < min_width_error:
            result[5] = min_width_error

    def fit_lines(
        self, eliminate_noise: bool = False, max_lines: int = -1
    ) -> list[GaussianParameters]:
        """Detect and fit lines until the strongest feature is below the noise.

        Args:
            eliminate_noise (bool, optional): Subtract the final residual from
                `values`. Defaults to False.
            max_lines (int, optional): Stop after this many lines, -1 for no
                limit. Defaults to -1.

        Returns:
            list[GaussianParameters]: One parameter vector per accepted line.
        """
        accepted: list[GaussianParameters] = []
        if max_lines == 0:
            return accepted
        times_sigma = self.options.times_sigma
        values = self.values.copy()
        bad_fit = numpy.zeros(values.size)

        while True:
            sigma = _sigma(values)
            saved = values.copy()
            candidates = [
                limits
                for limits in (
                    self._line_limits(values, sigma),
                    self._line_limits(-values, sigma),
                )
                if limits is not None
            ]
            if not candidates:
                break
            peak, start, end = max(candidates, key=lambda limits: abs(limits[0]))
            extremum = abs(peak)

            values[:start] = 0.0
            values[end:] = 0.0
            under_noise = False
            try:
                fit = self._fit_greatest_line(values, sigma, start, end)
                if abs(fit[2]) < extremum and abs(fit[2]) < times_sigma * sigma:
                    trial = values.copy()
                    self.remove_line(trial, fit)
                    sigma = _sigma(trial)
                    fit = self._fit_greatest_line(values, sigma, start, end)

                if min(abs(fit[2]), extremum) < times_sigma * sigma:
                    under_noise = True
                else:
                    center = self.record.channel(fit[0])
                    sd = fit[1] / (self.vres * FWHM_FACTOR)
                    nearest = abs(
                        fit[2] * math.exp(-0.5 * ((int(center + 0.5) - center) / sd) ** 2)
                    )
                    rejected = (
                        nearest < times_sigma * sigma
                        or fit[1] * 4.0 < abs(self.vres)
                        or fit[2] == 0
                    )
                    if not rejected:
                        before = values.copy()
                        self.remove_line(values, fit)
                        if _rms(values) > _rms(before):
                            values = before
                            rejected = True
                    if not rejected:
                        accepted.append(fit)
                    elif extremum > times_sigma * sigma:
                        bad_fit[start:end] += values[start:end]
                        values[start:end] = 0.0
                    else:
                        under_noise = True
            except FitDivergence as e:
                loguru.logger.debug(f"Marking feature as under noise: {e}")
                under_noise = True

            values[:start] += saved[:start]
            values[end:] += saved[end:]
            if under_noise or (max_lines >= 0 and len(accepted) >= max_lines):
                break

        values += bad_fit
        self.residual = values
        if eliminate_noise:
            self.values = self.values - values
        return accepted

    def fit_line_between_channels(
        self,
        chan0: int,
        chan1: int,
        y_min: float = -1.0,
        y_max: float = -1.0,
        eliminate: bool = False,
        sigma: float | None = None,
    ) -> GaussianParameters:
        """Fit one Gaussian to the channels between `chan0` and `chan1`.

        When `y_min != y_max`, channels above `y_max` are left out of the fit.
        When `sigma` is None it is estimated from the whole spectrum. With
        `eliminate` the fitted line is removed from `values`.
        """
        values = self.values.copy()
        if sigma is None:
            sigma = _sigma(values)
        size = values.size
        chan0 = min(max(chan0, 0), size - 1)
        chan1 = min(max(chan1, 0), size - 1)

        values[:chan0] = 0.0
        values[chan1:] = 0.0
        windowed = values.copy()
        excluded = numpy.zeros(size, dtype=bool)
        if y_max != y_min:
            y_min = float(numpy.min(values))
            y_min -= abs(y_min)
            inside = numpy.arange(size)
            inside = (inside >= chan0) & (inside < chan1)
            excluded = inside & ((windowed > y_max) | (windowed < y_min))
            values[excluded] = 0.0

        fit = self._fit_greatest_line(values, sigma, chan0, chan1)
        self.remove_line(values, fit)

        values[:chan0] += self.values[:chan0]
        values[chan1:] += self.values[chan1:]
        values[excluded] += self.values[excluded]
        if eliminate:
            self.remove_line(self.values, fit)
        self.residual = values
        return fit


def _quotient_error(a: float, a_error: float, b: float, b_error: float) -> float:
    """Error of `a / b`."""
    if a == 0 or b == 0:
        return math.nan
    return abs(a / b) * math.hypot(a_error / a, b_error / b)


class LineFittingEngine:
    """Automatic reduction of single-dish spectra into Gaussian lines."""

    class Options:
        times_sigma: float = 3.0
        bad_channel_threshold: float = -100.0
        max_fit_evaluations: int = 3000
        baseline_padding: int = 100
        residual_half_window: int = 10
        excluded_species: tuple = ()

        @classmethod
        def from_dict(cls, d: dict) -> Self:
            res = cls()
            for field_name, field_type in cls.__annotations__.items():
                if field_name not in d or d[field_name] is None:
                    continue
                if not isinstance(d[field_name], field_type):
                    loguru.logger.error(
                        f"Field {field_name} has type {type(d[field_name])}. Expected {field_type}"
                    )
                    continue
                setattr(res, field_name, d[field_name])
            return res

        @classmethod
        def from_namespace(cls, ns: argparse.Namespace) -> Self:
            return cls.from_dict(vars(ns))

    options: Options

    def __init__(self, options: Options | None = None):
        self.options = self.Options() if options is None else options

    def processor(self, record: SpectrumRecord) -> SpectrumProcessor:
        return SpectrumProcessor(record, self.options)

    def fix_bad_channels(
        self, values: numpy.typing.ArrayLike
    ) -> numpy.typing.NDArray[numpy.floating]:
        return fix_bad_channels(values, self.options.bad_channel_threshold)

    def reduce_baseline(
        self,
        record: SpectrumRecord,
        half_window: int,
        line_start: int | None = None,
        line_end: int | None = None,
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Baseline-only reduction with a moving mean, without line fitting.

        `line_start` and `line_end` are array indices of a line to protect.
        See `SpectrumProcessor.subtract_smoothed_baseline`.
        """
        return self.processor(record).subtract_smoothed_baseline(
            half_window, line_start, line_end
        )

    def reduce_linear_baseline(
        self, record: SpectrumRecord, half_window: int
    ) -> numpy.typing.NDArray[numpy.floating]:
        """Baseline-only reduction with a straight line, for large OTF maps."""
        return self.processor(record).subtract_linear_baseline(half_window)

    @staticmethod
    def refinement_iterations(number_of_lines: int) -> int:
        if number_of_lines > 150:
            loguru.logger.warning(
                f"Line refinement is disabled for a spectrum with {number_of_lines} > 150 lines."
            )
            return 0
        if number_of_lines > 80:
            return 2
        if number_of_lines > 40:
            return 3
        return 10

    def _rms_without_lines(self, record: SpectrumRecord, lines: list[SpectrumLine]):
        processor = self.processor(record)
        values = processor.values
        for line in lines:
            if line.enabled:
                processor.remove_line(values, line)
        return _sigma(values)

    def _lines_from_fits(
        self, fits: list[GaussianParameters], label_offset: int = 0
    ) -> list[SpectrumLine]:
        lines = []
        for i, fit in enumerate(fits):
            line = SpectrumLine.from_gaussian_parameters(fit)
            line.line_index = i + label_offset
            line.spectrum_index = 0
            line.label = f"Fit to line {line.line_index + 1}"
            line.label_for_chart_id = line.label
            lines.append(line)
        return lines

    def refine(
        self,
        record: SpectrumRecord,
        lines: list[SpectrumLine],
        sigma: float | None = None,
    ) -> list[SpectrumLine]:
        """Refit every enabled line alone against the spectrum without the others.

        Lines whose refitted peak falls below the noise threshold are disabled and
        marked deleted. A sweep is kept only when the global rms decreases.
        """
        if len(lines) <= 1:
            return lines
        iterations = self.refinement_iterations(len(lines))
        order = sorted(range(len(lines)), key=lambda i: -abs(lines[i].peak))
        best = [line.copy() for line in lines]
        rms0 = self._rms_without_lines(record, lines)
        threshold = self.options.times_sigma

        iteration = 0
        while iteration < iterations:
            repeat = False
            for index in order:
                line = lines[index]
                if not line.enabled:
                    continue
                processor = self.processor(record)
                processor.fix_level0()
                for j, other in enumerate(lines):
                    if j != index and other.enabled:
                        processor.remove_line(processor.values, other)
                try:
                    fit = processor.fit_line_between_channels(
                        line.min_channel,
                        line.max_channel,
                        line.y_min,
                        line.y_max,
                        False,
                        sigma,
                    )
                except FitDivergence as e:
                    loguru.logger.debug(f"Dropping line {line.label}: {e}")
                    fit = None
                if fit is not None:
                    line.update_from_gaussian_parameters(fit)
                if fit is None or abs(fit[2]) < threshold * rms0:
                    line.deleted = True
                    line.enabled = False
                    repeat = True
                    break

            rms = self._rms_without_lines(record, lines)
            if rms < rms0 or repeat:
                rms0 = rms
                best = [line.copy() for line in lines]
                iteration = 0 if repeat else iteration + 1
            else:
                lines[:] = best
                break
        return lines

    def reduce(self, record: SpectrumRecord, max_lines: int = -1) -> ReductionResult:
        """Find the lines of `record` and remove its baseline.

        Args:
            record (SpectrumRecord): The spectrum, left untouched.
            max_lines (int, optional): Maximum number of lines, -1 for no limit.
                Defaults to -1.

        Returns:
            ReductionResult: Fitted lines, the baseline-subtracted spectrum, the
                residual without lines, the subtracted baseline and the noise.
        """
        record = record.copy()
        processor = self.processor(record)
        processor.fix_level0()
        lines = self._lines_from_fits(processor.fit_lines(False, max_lines))
        if lines:
            lines = self.refine(record, lines)
            lines = [line for line in lines if not line.deleted]

        processor = self.processor(record)
        processor.fix_level0()
        data = processor.values.copy()
        for line in lines:
            if line.enabled:
                processor.remove_line(processor.values, line)
        processed = processor.smoothed_residual(self.options.residual_half_window, data)
        baseline = data - processed
        record.data = processed

        processor = self.processor(record)
        processor.fix_level0()
        if not lines:
            return ReductionResult(
                lines=[],
                processed=processor.values,
                residual=processor.values.copy(),
                baseline=baseline,
                sigma=_sigma(processor.values),
            )

        unfitted = processor.values.copy()
        for line in lines:
            try:
                processor.fit_line_between_channels(
                    line.min_channel, line.max_channel, -1.0, -1.0, True
                )
            except FitDivergence as e:
                loguru.logger.debug(f"Skipping {line.label} while estimating noise: {e}")
        sigma = _sigma(processor.values)
        processor.values = unfitted

        kept = []
        for line in lines:
            try:
                fit = processor.fit_line_between_channels(
                    line.min_channel, line.max_channel, -1.0, -1.0, True, sigma
                )
            except FitDivergence as e:
                loguru.logger.warning(f"Dropping {line.label}: {e}")
                continue
            line.update_from_gaussian_parameters(fit)
            kept.append(line)
        for i, line in enumerate(kept):
            line.line_index = i
            line.spectrum_index = 0
            line.label = f"Fit to line {i + 1}"
            line.label_for_chart_id = line.label

        kept = self.refine(record, kept, sigma)
        kept = [line for line in kept if not line.deleted]

        residual = self.processor(record)
        residual.fix_level0()
        for line in kept:
            residual.remove_line(residual.values, line)
        return ReductionResult(
            lines=kept,
            processed=unfitted,
            residual=residual.values,
            baseline=baseline,
            sigma=sigma,
        )

    def sum_spectra(
        self,
        containers: typing.Iterable,
        source: str,
        line: str,
        offset1: float,
        offset2: float,
        telescope: str,
        rest_frequency: float = -1.0,
    ) -> SpectrumRecord | None:
        """Average all spectra matching a source, line, position and backend.

        Offsets are in arcsec and match within 1 arcsec. Each spectrum is scaled
        to the integration time of the first one, and the integration times are
        added. When `rest_frequency` is not positive, the rest frequency of the
        first match is used. A single match is only repaired for bad channels.

        Returns:
            SpectrumRecord | None: The averaged spectrum, or None without matches.
        """
        source, line, telescope = source.upper(), line.upper(), telescope.upper()
        first: SpectrumRecord | None = None
        total: numpy.typing.NDArray[numpy.floating] | None = None
        count = 0
        integration_normalize = 0.0
        integration_total = 0.0

        for container in containers:
            for number in container.get_list_of_spectra(only_spectral=True):
                record = container.get_spectrum(number)
                if record is None:
                    continue
                header = record.header
                if not (
                    header.source.strip().upper() == source
                    and header.line.strip().upper() == line
                    and header.teles.strip().upper() == telescope
                    and abs(header.off1 / ARCSEC_TO_RAD - offset1) < 1.0
                    and abs(header.off2 / ARCSEC_TO_RAD - offset2) < 1.0
                ):
                    continue
                if rest_frequency > 0 and abs(
                    record.reference_frequency - rest_frequency
                ) >= 1.0:
                    continue
                if rest_frequency <= 0:
                    rest_frequency = record.reference_frequency

                data = record.data.astype(numpy.float64)
                integration = record.value(K.INTEG)
                if first is None:
                    first = record
                    total = data
                    integration_normalize = integration
                    integration_total = integration
                    count = 1
                    continue
                if data.size != first.nchan:
                    loguru.logger.warning(
                        f"Skipping observation {header.num}: {data.size} channels instead of {first.nchan}."
                    )
                    continue
                if integration != 0 and integration_normalize != 0:
                    data = data * (integration_normalize / integration)
                integration_total += integration
                total = total + data
                count += 1

        if first is None or total is None:
            return None

        if count > 1:
            data = total / count
            num = scan = 0
        else:
            data = self.fix_bad_channels(total)
            num, scan = first.header.num, first.header.scan

        header = SpectrumHeader(
            num=num,
            source=source,
            line=line,
            teles=telescope,
            off1=offset1 * ARCSEC_TO_RAD,
            off2=offset2 * ARCSEC_TO_RAD,
            typec=first.header.typec,
            kind=int(DataKind.SPECTRAL),
            scan=scan,
        )
        result = SpectrumRecord(header, data.astype(numpy.float32), first.parameters)
        result.put(K.INTEG, integration_total)
        result.put(K.SOURCE, source)
        result.put(K.LINE, line)
        result.put(K.TELES, telescope)
        return result

    def identify_lines(
        self,
        lines: list[SpectrumLine],
        catalog: LineCatalog,
        max_energy: float = 0.0,
        min_intensity: float = 0.0,
    ) -> list[list[str]]:
        """Query `catalog` around each line and label the line with the result.

        Species listed in `Options.excluded_species` are dropped.
        """
        identified = []
        for line in lines:
            width = abs(line.width * line.freq / SPEED_OF_LIGHT)
            species = [
                name
                for name in catalog.query(line.freq, width, max_energy, min_intensity)
                if not any(
                    name.strip().startswith(excluded)
                    for excluded in self.options.excluded_species
                )
            ]
            if species:
                line.label = ", ".join(species)
            identified.append(species)
        return identified
