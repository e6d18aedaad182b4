import dataclasses
import math

import numpy
import numpy.typing

__all__ = ["Kernel"]


@dataclasses.dataclass(frozen=True)
class Kernel:
    """Convolution weights sampled on the pixel grid of a cube.

    `weights[iy, ix]` has odd sizes along both axes; the centre element sits
    on the convolved pixel.
    """

    weights: numpy.typing.NDArray[numpy.float64]

    def __post_init__(self):
        weights = numpy.asarray(self.weights, dtype=numpy.float64)
        if weights.ndim != 2:
            raise ValueError(f"A kernel needs two dimensions, got {weights.ndim}.")
        object.__setattr__(self, "weights", weights)

    @property
    def half_width(self) -> int:
        return self.weights.shape[1] // 2

    @property
    def half_height(self) -> int:
        return self.weights.shape[0] // 2

    @property
    def shape(self) -> tuple[int, int]:
        return self.weights.shape

    def normalized(self) -> "Kernel":
        return Kernel(self.weights / self.weights.sum())

    @classmethod
    def gaussian(
        cls,
        beam_x: float,
        beam_y: float,
        position_angle: float,
        resolution: float,
        sampling: float = 4.0,
    ) -> "Kernel":
        """Elliptical Gaussian beam.

        Args:
            beam_x (float): Beam axis in arcsec.
            beam_y (float): The other beam axis in arcsec. The larger of the two
                is taken as the major axis.
            position_angle (float): Position angle in degrees, counted from the
                y axis towards -x.
            resolution (float): Pixel size of the target grid in arcsec.
            sampling (float, optional): Radius of the kernel in units of the
                beam. Defaults to 4.0; values below 0.5 are not meaningful.

        Returns:
            Kernel: Weights are zero outside the sampled ellipse.
        """
        if beam_y < beam_x:
            beam_x, beam_y = beam_y, beam_x

        half_x = int(beam_x * sampling / resolution + 0.5)
        half_y = int(beam_y * sampling / resolution + 0.5)
        dx = (numpy.arange(2 * half_x + 1) - half_x) * resolution
        dy = (numpy.arange(2 * half_y + 1) - half_y) * resolution
        dx, dy = numpy.meshgrid(dx, dy)

        cosa = math.cos(math.radians(-position_angle))
        sina = math.sin(math.radians(-position_angle))
        with numpy.errstate(divide="ignore", invalid="ignore"):
            factor_x = (
                dx * dx * cosa * cosa + dy * dy * sina * sina - 2.0 * dx * dy * cosa * sina
            ) / (beam_x * beam_x)
            factor_y = (
                dy * dy * cosa * cosa + dx * dx * sina * sina + 2.0 * dx * dy * cosa * sina
            ) / (beam_y * beam_y)
        # 0/0 along a degenerate axis
        factor_x = numpy.nan_to_num(factor_x, nan=0.0, posinf=numpy.inf)
        factor_y = numpy.nan_to_num(factor_y, nan=0.0, posinf=numpy.inf)
        outside = numpy.hypot(factor_x, factor_y) > sampling
        if beam_x == 0.0 and beam_y == 0.0:
            factor_x = numpy.ones_like(dx)
            factor_y = numpy.ones_like(dy)

        weights = numpy.exp(-4.0 * math.log(2.0) * (factor_x + factor_y))
        weights[outside] = 0.0
        return cls(weights)
