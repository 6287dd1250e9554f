"""
Limited-memory BFGS with box constraints.

The iterations run inside a generator that reports what it needs through task codes:
"FG" asks for the function value and gradient at the current point, "NEW_X" marks a
completed iteration, and the remaining codes are terminal.
"""

import logging
from collections import deque
from dataclasses import dataclass
from enum import Enum

import numpy as np

from .errors import ConfigurationError, OptimizerDefect

logger = logging.getLogger(__name__)

TASK_FG = 'FG'
TASK_NEW_X = 'NEW_X'
TASK_FUNCTION_CONVERGENCE = 'CONVERGENCE: REL_REDUCTION_OF_F_<=_FACTR*EPSMCH'
TASK_GRADIENT_CONVERGENCE = 'CONVERGENCE: NORM_OF_PROJECTED_GRADIENT_<=_PGTOL'
TASK_LINE_SEARCH_FAILED = 'ABNORMAL_TERMINATION_IN_LNSRCH'

EPSMCH = np.finfo(np.float64).eps

# Line search parameters
FTOL = 1e-3
STPMIN = 1e-20
STPMAX = 1e20
MAX_BACKTRACKS = 40


class BoundedLBFGSStatus(Enum):
    ITERATING = 'iterating'
    FUNCTION_CONVERGENCE = 'function_convergence'
    GRADIENT_CONVERGENCE = 'gradient_convergence'
    LINE_SEARCH_FAILED = 'line_search_failed'
    CANCELLED = 'cancelled'


_TERMINAL_STATUSES = {
    TASK_FUNCTION_CONVERGENCE: BoundedLBFGSStatus.FUNCTION_CONVERGENCE,
    TASK_GRADIENT_CONVERGENCE: BoundedLBFGSStatus.GRADIENT_CONVERGENCE,
    TASK_LINE_SEARCH_FAILED: BoundedLBFGSStatus.LINE_SEARCH_FAILED,
}


@dataclass(frozen=True)
class OptimizationProgress:
    iteration: int
    value: float
    solution: np.ndarray


def projected_gradient_norm(x, g, lower, upper):
    """Infinity norm of the gradient projected on the feasible box"""
    pg = np.where(g < 0, np.maximum(x - upper, g), np.minimum(x - lower, g))
    return float(np.max(np.abs(pg))) if pg.size else 0.0


class BoundedLBFGS:
    """
    Minimizes a function of a vector, with optional lower and upper bounds for each variable.

    Args:
        number_of_variables: size of the solution vector
        function: f(x) -> float
        gradient: g(x) -> array with the same size as x
        corrections: number of correction pairs used to approximate the inverse Hessian
        function_tolerance: stops when the relative reduction of f is below function_tolerance * machine epsilon
        gradient_tolerance: stops when the projected gradient infinity norm is below this value
        max_iterations: iterations cap, 0 means no cap
        token: optional threading.Event, the optimization stops once it is set
        progress: optional callback, receives an OptimizationProgress after each iteration
    """

    def __init__(self, number_of_variables, function, gradient, lower_bounds=None, upper_bounds=None,
                 corrections=5, function_tolerance=1e5, gradient_tolerance=0.0, max_iterations=0,
                 token=None, progress=None):
        if number_of_variables <= 0:
            raise ConfigurationError("The number of variables must be positive")
        if corrections <= 0:
            raise ConfigurationError("Number of corrections should be higher than zero")
        if function_tolerance < 0 or gradient_tolerance < 0:
            raise ConfigurationError("Tolerance must be greater than or equal to zero")
        if max_iterations < 0:
            raise ConfigurationError("The iterations cap can't be negative")
        self.number_of_variables = number_of_variables
        self.function = function
        self.gradient = gradient
        self.lower_bounds = self._bounds(lower_bounds, -np.inf)
        self.upper_bounds = self._bounds(upper_bounds, np.inf)
        if np.any(self.lower_bounds > self.upper_bounds):
            raise ConfigurationError("The lower bounds can't be higher than the upper bounds")
        self.corrections = corrections
        self.function_tolerance = function_tolerance
        self.gradient_tolerance = gradient_tolerance
        self.max_iterations = max_iterations
        self.token = token
        self.progress = progress
        self.solution = np.zeros(number_of_variables)
        self.value = None
        self.gradient_value = None
        self.status = BoundedLBFGSStatus.ITERATING
        self.iterations = 0
        self.evaluations = 0
        self._f = None

    def _bounds(self, bounds, default):
        if bounds is None:
            return np.full(self.number_of_variables, default)
        bounds = np.asarray(bounds, dtype=np.float64)
        if bounds.shape != (self.number_of_variables,):
            raise ConfigurationError("The bounds vector should have the same length as the number of variables to be optimized")
        return bounds

    def _evaluate(self, x):
        self.evaluations += 1
        f = float(self.function(x))
        g = np.asarray(self.gradient(x), dtype=np.float64).reshape(-1)
        if g.shape != x.shape:
            raise ConfigurationError(f"The gradient has {g.size} values, expected {x.size}")
        return f, g

    def minimize(self, solution=None):
        """
        Runs the optimization, starting from solution (or from the current solution).

        Returns:
            The final BoundedLBFGSStatus. The solution, its value and its gradient are
            stored in solution, value and gradient_value.
        """
        if solution is not None:
            solution = np.asarray(solution, dtype=np.float64).reshape(-1)
            if solution.size != self.number_of_variables:
                raise ConfigurationError("The starting solution has the wrong size")
            self.solution = solution.copy()
        x = np.clip(self.solution, self.lower_bounds, self.upper_bounds)
        self.status = BoundedLBFGSStatus.ITERATING
        self.iterations = 0
        self.evaluations = 0

        engine = self._engine(x)
        task = next(engine)
        # Cancellation and the iterations cap are only checked between iterations
        stopped = self._should_stop()
        while not stopped:
            if task.startswith(TASK_FG):
                task = engine.send(self._evaluate(x))
            elif task.startswith(TASK_NEW_X):
                self.iterations += 1
                logger.debug("Iteration %d, f = %g", self.iterations, self._f)
                if self.progress is not None:
                    self.progress(OptimizationProgress(self.iterations, self._f, x.copy()))
                stopped = self._should_stop()
                if not stopped:
                    task = next(engine)
            elif task in _TERMINAL_STATUSES:
                self.status = _TERMINAL_STATUSES[task]
                break
            else:
                raise OptimizerDefect(task)
        engine.close()
        self._exit(x)
        logger.info("L-BFGS stopped after %d iterations: %s", self.iterations, self.status.value)
        return self.status

    def _should_stop(self):
        if self.token is not None and self.token.is_set():
            self.status = BoundedLBFGSStatus.CANCELLED
            return True
        return self.max_iterations > 0 and self.iterations >= self.max_iterations

    def _exit(self, x):
        self.solution = x.copy()
        self.value, self.gradient_value = self._evaluate(x)

    def _direction(self, g, free, pairs):
        """Two-loop recursion over the free variables"""
        q = np.where(free, -g, 0.0)
        alphas = []
        for s, y, rho in reversed(pairs):
            alpha = rho * np.dot(s[free], q[free])
            q[free] -= alpha * y[free]
            alphas.append(alpha)
        if pairs:
            s, y, _ = pairs[-1]
            q *= np.dot(s, y) / np.dot(y, y)
        for (s, y, rho), alpha in zip(pairs, reversed(alphas)):
            beta = rho * np.dot(y[free], q[free])
            q[free] += (alpha - beta) * s[free]
        q[~free] = 0.0
        return q

    def _engine(self, x):
        """
        The iterations. Yields task codes, and expects the (f, g) pair at x to be
        sent back after every "FG" task. The point x is updated in place.
        """
        lower, upper = self.lower_bounds, self.upper_bounds
        factr, pgtol = self.function_tolerance, self.gradient_tolerance
        pairs = deque(maxlen=self.corrections)
        f, g = yield TASK_FG
        self._f = f
        if projected_gradient_norm(x, g, lower, upper) <= pgtol:
            yield TASK_GRADIENT_CONVERGENCE
            return
        while True:
            # Variables at a bound with the gradient pushing outwards stay fixed
            free = ~(((x <= lower) & (g > 0)) | ((x >= upper) & (g < 0)))
            d = self._direction(g, free, pairs)
            gd = np.dot(g, d)
            if not gd < 0:
                pairs.clear()
                d = np.where(free, -g, 0.0)
                gd = np.dot(g, d)
            norm = np.linalg.norm(d)
            if norm == 0:
                yield TASK_GRADIENT_CONVERGENCE
                return
            stp = 1.0 / norm if not pairs else 1.0
            stp = min(max(stp, STPMIN), STPMAX)

            # Backtracking line search along the projected path
            x0, f0, g0 = x.copy(), f, g
            accepted = False
            for _ in range(MAX_BACKTRACKS):
                x[:] = np.clip(x0 + stp * d, lower, upper)
                f, g = yield TASK_FG
                descent = min(np.dot(g0, x - x0), 0.0)
                if np.isfinite(f) and f <= f0 + FTOL * descent and not np.array_equal(x, x0):
                    accepted = True
                    break
                stp *= 0.5
                if stp < STPMIN:
                    break
            if not accepted:
                x[:] = x0
                self._f = f0
                yield TASK_LINE_SEARCH_FAILED
                return
            self._f = f
            yield TASK_NEW_X

            s, y = x - x0, g - g0
            sy = np.dot(s, y)
            if sy > EPSMCH * np.dot(y, y):
                pairs.append((s, y, 1.0 / sy))
            if projected_gradient_norm(x, g, lower, upper) <= pgtol:
                yield TASK_GRADIENT_CONVERGENCE
                return
            if (f0 - f) / max(abs(f0), abs(f), 1.0) <= factr * EPSMCH:
                yield TASK_FUNCTION_CONVERGENCE
                return
