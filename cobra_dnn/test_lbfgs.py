import threading

import numpy as np
import pytest

from cobra_dnn.errors import ConfigurationError, OptimizerDefect
from cobra_dnn.lbfgs import BoundedLBFGS, BoundedLBFGSStatus, projected_gradient_norm


def two_bumps(v):
    x, y = v
    return -np.exp(-(x - 1) ** 2) - np.exp(-(y - 2) ** 2 / 2)


def two_bumps_gradient(v):
    x, y = v
    return np.array([2 * (x - 1) * np.exp(-(x - 1) ** 2),
                     (y - 2) * np.exp(-(y - 2) ** 2 / 2)])


def quadratic(v):
    return (v[0] - 3) ** 2 + (v[1] + 1) ** 2


def quadratic_gradient(v):
    return np.array([2 * (v[0] - 3), 2 * (v[1] + 1)])


def test_gradient_convergence():
    bfgs = BoundedLBFGS(2, two_bumps, two_bumps_gradient, function_tolerance=0, gradient_tolerance=1e-6)
    status = bfgs.minimize(np.zeros(2))
    assert status == BoundedLBFGSStatus.GRADIENT_CONVERGENCE
    assert np.allclose(bfgs.solution, [1.0, 2.0], atol=1e-4)
    assert np.isclose(bfgs.value, -2.0)
    assert np.all(np.abs(bfgs.gradient_value) <= 1e-6)
    assert bfgs.iterations > 0


def test_function_convergence_with_defaults():
    bfgs = BoundedLBFGS(2, two_bumps, two_bumps_gradient)
    status = bfgs.minimize([0.5, 1.0])
    assert status in (BoundedLBFGSStatus.FUNCTION_CONVERGENCE, BoundedLBFGSStatus.GRADIENT_CONVERGENCE)
    assert np.allclose(bfgs.solution, [1.0, 2.0], atol=1e-3)


def test_bounds():
    bfgs = BoundedLBFGS(2, quadratic, quadratic_gradient, lower_bounds=[0, 0], upper_bounds=[2, 5],
                        gradient_tolerance=1e-8)
    status = bfgs.minimize([1, 1])
    assert status in (BoundedLBFGSStatus.GRADIENT_CONVERGENCE, BoundedLBFGSStatus.FUNCTION_CONVERGENCE)
    assert np.allclose(bfgs.solution, [2.0, 0.0], atol=1e-4)
    assert np.all(bfgs.solution >= [0, 0]) and np.all(bfgs.solution <= [2, 5])


def test_start_is_projected_on_bounds():
    seen = []

    def function(v):
        seen.append(v.copy())
        return quadratic(v)
    bfgs = BoundedLBFGS(2, function, quadratic_gradient, lower_bounds=[0, 0], upper_bounds=[2, 5])
    bfgs.minimize([10, -10])
    assert np.array_equal(seen[0], [2, 0])


def test_minimum_at_start():
    bfgs = BoundedLBFGS(2, quadratic, quadratic_gradient)
    status = bfgs.minimize([3, -1])
    assert status == BoundedLBFGSStatus.GRADIENT_CONVERGENCE
    assert bfgs.iterations == 0
    # One evaluation to start, one more on exit
    assert bfgs.evaluations == 2


def test_max_iterations():
    bfgs = BoundedLBFGS(2, two_bumps, two_bumps_gradient, function_tolerance=0, max_iterations=1)
    status = bfgs.minimize(np.zeros(2))
    assert status == BoundedLBFGSStatus.ITERATING
    assert bfgs.iterations == 1
    assert bfgs.value < two_bumps(np.zeros(2))


def test_cancel_before_start():
    token = threading.Event()
    token.set()
    bfgs = BoundedLBFGS(2, two_bumps, two_bumps_gradient, token=token)
    status = bfgs.minimize(np.zeros(2))
    assert status == BoundedLBFGSStatus.CANCELLED
    assert bfgs.iterations == 0
    assert bfgs.evaluations == 1
    assert np.isclose(bfgs.value, two_bumps(np.zeros(2)))


def test_cancel_from_progress():
    token = threading.Event()
    reports = []

    def progress(report):
        reports.append(report)
        if report.iteration == 2:
            token.set()
    bfgs = BoundedLBFGS(2, two_bumps, two_bumps_gradient, function_tolerance=0, gradient_tolerance=1e-12,
                        token=token, progress=progress)
    status = bfgs.minimize(np.zeros(2))
    assert status == BoundedLBFGSStatus.CANCELLED
    assert bfgs.iterations == 2
    assert [r.iteration for r in reports] == [1, 2]
    assert np.allclose(bfgs.solution, reports[-1].solution)
    assert reports[1].value <= reports[0].value


def test_unknown_task_is_a_defect():
    class BrokenLBFGS(BoundedLBFGS):
        def _engine(self, x):
            yield 'STOP: SOMETHING_UNEXPECTED'

    bfgs = BrokenLBFGS(2, two_bumps, two_bumps_gradient)
    with pytest.raises(OptimizerDefect):
        bfgs.minimize(np.zeros(2))


def test_invalid_configuration():
    with pytest.raises(ConfigurationError):
        BoundedLBFGS(0, two_bumps, two_bumps_gradient)
    with pytest.raises(ConfigurationError):
        BoundedLBFGS(2, two_bumps, two_bumps_gradient, corrections=0)
    with pytest.raises(ConfigurationError):
        BoundedLBFGS(2, two_bumps, two_bumps_gradient, gradient_tolerance=-1)
    with pytest.raises(ConfigurationError):
        BoundedLBFGS(2, two_bumps, two_bumps_gradient, lower_bounds=[0, 0, 0])
    with pytest.raises(ConfigurationError):
        BoundedLBFGS(2, two_bumps, two_bumps_gradient, lower_bounds=[1, 1], upper_bounds=[0, 2])
    with pytest.raises(ConfigurationError):
        BoundedLBFGS(2, two_bumps, two_bumps_gradient).minimize(np.zeros(3))


def test_projected_gradient_norm():
    x = np.array([0.0, 1.0, 2.0])
    g = np.array([1.0, -3.0, -0.5])
    lower, upper = np.zeros(3), np.full(3, 2.0)
    # The first and last variables sit on a bound with the gradient pushing outwards
    assert projected_gradient_norm(x, g, lower, upper) == 1.0
