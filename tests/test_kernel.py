import numpy
import pytest

from gildas_spectral_pipeline import Kernel


def test_circular_gaussian():
    kernel = Kernel.gaussian(2.0, 2.0, 0.0, 1.0)
    assert kernel.shape == (17, 17)
    assert kernel.half_width == kernel.half_height == 8
    assert kernel.weights[8, 8] == 1.0
    # half maximum at half the FWHM
    assert kernel.weights[8, 9] == pytest.approx(0.5)
    assert kernel.weights[9, 8] == pytest.approx(0.5)
    numpy.testing.assert_allclose(kernel.weights, kernel.weights.T)


def test_elliptical_gaussian_major_axis_along_y():
    kernel = Kernel.gaussian(3.0, 1.0, 0.0, 1.0)
    assert kernel.shape == (25, 9)
    centre_y, centre_x = 12, 4
    assert kernel.weights[centre_y + 1, centre_x] > kernel.weights[centre_y, centre_x + 1]
    assert kernel.weights[centre_y + 1, centre_x] == pytest.approx(2.0 ** (-4.0 / 9.0))


def test_position_angle_rotates_the_beam():
    kernel = Kernel.gaussian(1.0, 3.0, 90.0, 1.0)
    weights = kernel.weights
    cy, cx = kernel.half_height, kernel.half_width
    assert weights[cy, cx + 2] > weights[cy + 2, cx]


def test_weights_vanish_outside_the_sampled_ellipse():
    kernel = Kernel.gaussian(2.0, 2.0, 0.0, 1.0, sampling=1.0)
    assert kernel.shape == (5, 5)
    assert kernel.weights[0, 0] == 0.0
    assert kernel.weights[2, 0] > 0.0


def test_normalized():
    kernel = Kernel.gaussian(2.0, 2.0, 0.0, 1.0).normalized()
    assert kernel.weights.sum() == pytest.approx(1.0)


def test_two_dimensions_required():
    with pytest.raises(ValueError):
        Kernel(numpy.ones(3))
