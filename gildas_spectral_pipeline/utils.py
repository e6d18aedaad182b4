import typing

import bottleneck  # type: ignore
import numpy
import numpy.typing

__all__ = [
    "centered_move_mean",
    "centered_move_sum",
]

ARCSEC_TO_RAD = numpy.pi / (180.0 * 3600.0)


def _centered_move(
    move: typing.Callable,
    reduce: typing.Callable,
    arr: numpy.typing.NDArray[typing.Any],
    half_moving_window: int,
) -> numpy.typing.NDArray[numpy.floating]:
    arr = numpy.asarray(arr, dtype=numpy.float64)
    if half_moving_window <= 0:
        return arr.copy()
    moving_window = 2 * half_moving_window + 1
    if arr.size < moving_window:
        out = numpy.full(arr.size, numpy.nan)
        for i in range(arr.size):
            window = arr[max(i - half_moving_window, 0) : i + half_moving_window + 1]
            if numpy.any(numpy.isfinite(window)):
                out[i] = reduce(window)
        return out
    result = move(arr, window=moving_window, min_count=1)
    result[:-half_moving_window] = result[half_moving_window:]
    result[-half_moving_window:] = move(
        arr[-moving_window:][::-1], window=moving_window, min_count=1
    )[half_moving_window : 2 * half_moving_window][::-1]
    return result


def centered_move_sum(
    arr: numpy.typing.NDArray[typing.Any], half_moving_window: int
) -> numpy.typing.NDArray[numpy.floating]:
    """Sum over `[i - half, i + half]`, clipped at both ends, ignoring NaN."""
    return _centered_move(bottleneck.move_sum, numpy.nansum, arr, half_moving_window)


def centered_move_mean(
    arr: numpy.typing.NDArray[typing.Any], half_moving_window: int
) -> numpy.typing.NDArray[numpy.floating]:
    """Mean over `[i - half, i + half]`, clipped at both ends, ignoring NaN."""
    return _centered_move(bottleneck.move_mean, numpy.nanmean, arr, half_moving_window)

