import dataclasses
import math

__all__ = [
    "GAUSSIAN_AREA_FACTOR",
    "SpectrumLine",
    "gaussian_area",
]

# area = factor * width * peak for a Gaussian with FWHM `width`
GAUSSIAN_AREA_FACTOR = 1.064467


def gaussian_area(
    width: float, width_error: float, peak: float, peak_error: float
) -> tuple[float, float]:
    area = GAUSSIAN_AREA_FACTOR * width * peak
    error = GAUSSIAN_AREA_FACTOR * math.hypot(width_error * peak, width * peak_error)
    return area, error


@dataclasses.dataclass
class SpectrumLine:
    min_channel: int
    max_channel: int
    y_min: float = -1.0
    y_max: float = -1.0
    freq: float = 0.0
    area: float = 0.0
    area_error: float = 0.0
    peak: float = 0.0
    peak_error: float = 0.0
    vel: float = 0.0
    vel_error: float = 0.0
    width: float = 0.0
    width_error: float = 0.0
    label: str = ""
    label_for_chart_id: str = ""
    enabled: bool = True
    fitted: bool = False
    deleted: bool = False
    spectrum_index: int = -1
    line_index: int = -1

    @classmethod
    def from_gaussian_parameters(
        cls, parameters: list[float], **kwargs
    ) -> "SpectrumLine":
        """Build a line from the 11-element vector of `gaussian_parameters`."""
        min_channel, max_channel = int(parameters[8]), int(parameters[9])
        if min_channel > max_channel:
            min_channel, max_channel = max_channel, min_channel
        line = cls(min_channel=min_channel, max_channel=max_channel, **kwargs)
        line.update_from_gaussian_parameters(parameters)
        return line

    def update_from_gaussian_parameters(self, parameters: list[float]):
        self.vel = float(parameters[0])
        self.width = float(parameters[1])
        self.peak = float(parameters[2])
        self.area = float(parameters[3])
        self.vel_error = float(parameters[4])
        self.width_error = float(parameters[5])
        self.peak_error = float(parameters[6])
        self.area_error = float(parameters[7])
        self.freq = float(parameters[10])
        self.fitted = True

    def gaussian_parameters(self) -> list[float]:
        """Velocity, width, peak, area, their four errors, the channel bounds and
        the frequency, in that order."""
        return [
            self.vel,
            self.width,
            self.peak,
            self.area,
            self.vel_error,
            self.width_error,
            self.peak_error,
            self.area_error,
            float(self.min_channel),
            float(self.max_channel),
            self.freq,
        ]

    def copy(self) -> "SpectrumLine":
        return dataclasses.replace(self)

    def to_dict(self) -> dict:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, d: dict) -> "SpectrumLine":
        names = {field.name for field in dataclasses.fields(cls)}
        return cls(**{key: value for key, value in d.items() if key in names})
