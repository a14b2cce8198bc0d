from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Optional

import numpy as np

from .. import logger
from ..typing import TensorLike


@dataclass
class StopCriteria:
    iterations: int = 500
    grad_norm: float = 1e-8


class MinimizerStatus(Enum):
    CONVERGED = 'converged'
    MAX_ITERATIONS = 'max_iterations'
    STALLED = 'stalled'


@dataclass
class MinimizeResult:
    """Outcome of a minimization; `x` is the last accepted iterate."""
    x: TensorLike
    status: MinimizerStatus
    iterations: int = 0
    fun: float = np.nan
    grad_norm: float = np.nan
    message: str = ''

    @property
    def success(self) -> bool:
        return self.status == MinimizerStatus.CONVERGED


class MinimizerStallError(RuntimeError):
    """The minimizer could not make progress; `solution` is the last full iterate."""
    def __init__(self, message: str, solution: Optional[TensorLike] = None):
        super().__init__(message)
        self.solution = solution


class LBFGSMinimizer():
    """
    Limited memory BFGS with a backtracking line search.

    The line search only accepts steps for which the problem reports a valid,
    collision-free step and a finite energy satisfying the Armijo condition.

    Parameters:
        stop_criteria (StopCriteria | None): Iteration budget and gradient tolerance.
        num_grad (int): Number of stored correction pairs.
        max_line_search_iters (int): Number of step halvings before giving up.
        c1 (float): Armijo constant.
        ftol (float): Relative slack ``ftol*|f|`` added to the sufficient
            decrease test, so steps at round-off level are not rejected.
    """
    def __init__(self, stop_criteria: Optional[StopCriteria] = None, num_grad: int = 10,
                 max_line_search_iters: int = 50, c1: float = 1e-4, ftol: float = 1e-12):
        self.stop_criteria = stop_criteria if stop_criteria is not None else StopCriteria()
        self.num_grad = num_grad
        self.max_line_search_iters = max_line_search_iters
        self.c1 = c1
        self.ftol = ftol
        self.S: Deque[TensorLike] = deque()
        self.Y: Deque[TensorLike] = deque()

    def reset(self):
        self.S = deque()
        self.Y = deque()

    def hessian_gradient_prod(self, g: TensorLike) -> TensorLike:
        N = len(self.S)
        q = g
        rho = np.zeros((N, ), dtype=np.float64)
        alpha = np.zeros((N, ), dtype=np.float64)
        for i in range(N-1, -1, -1):
            rho[i] = 1/np.dot(self.S[i], self.Y[i])
            alpha[i] = np.dot(self.S[i], q)*rho[i]
            q = q - alpha[i]*self.Y[i]

        if N > 0:
            r = np.dot(self.S[-1], self.Y[-1])/np.dot(self.Y[-1], self.Y[-1])*q
        else:
            r = q

        for i in range(0, N):
            beta = rho[i]*np.dot(self.Y[i], r)
            r = r + (alpha[i] - beta)*self.S[i]
        return r

    def line_search(self, problem, x, f, g, d, alpha):
        gtd = np.dot(g, d)
        for _ in range(self.max_line_search_iters):
            xn = x + alpha*d
            problem.line_search_begin(x, xn)
            try:
                if problem.is_step_valid(x, xn) and problem.is_step_collision_free(x, xn):
                    fn = problem.value(xn)
                    if np.isfinite(fn) and fn <= f + self.c1*alpha*gtd + self.ftol*abs(f):
                        return alpha, xn, fn
            finally:
                problem.line_search_end()
            alpha *= 0.5
        return None

    def minimize(self, problem, x: TensorLike) -> MinimizeResult:
        """Minimize `problem` from `x` in its current (full or reduced) view."""
        self.reset()
        x = np.asarray(x, dtype=np.float64).copy()
        f = problem.value(x)
        if not np.isfinite(f):
            return MinimizeResult(x, MinimizerStatus.STALLED, 0, f, np.nan,
                    'non-finite energy at the initial iterate')
        g = problem.gradient(x)
        gnorm = np.linalg.norm(g)

        i = 0
        for i in range(self.stop_criteria.iterations):
            if gnorm < self.stop_criteria.grad_norm:
                return MinimizeResult(x, MinimizerStatus.CONVERGED, i, f, gnorm)

            d = -self.hessian_gradient_prod(g)
            if np.dot(g, d) >= 0 or np.isnan(np.dot(g, d)):
                logger.debug(f"Not descent direction at iteration {i}, reset to gradient descent.")
                self.reset()
                d = -g

            alpha = 1.0 if len(self.S) > 0 else min(1.0, 1.0/gnorm)
            found = self.line_search(problem, x, f, g, d, alpha)
            if found is None:
                return MinimizeResult(x, MinimizerStatus.STALLED, i, f, gnorm,
                        f'line search failed at iteration {i}')
            alpha, xn, fn = found

            gn = problem.gradient(xn)
            s = xn - x
            y = gn - g
            sty = np.dot(s, y)
            if sty <= 1e-12*np.dot(y, y):
                logger.debug(f"lbfgs: sty <= 0, skipping update at iteration {i}.")
            else:
                if len(self.S) == self.num_grad:
                    self.S.popleft()
                    self.Y.popleft()
                self.S.append(s)
                self.Y.append(y)

            x, f, g = xn, fn, gn
            gnorm = np.linalg.norm(g)
            logger.debug(f"current step {i}, StepLength = {alpha}, f = {f}, gnorm = {gnorm}")

        if gnorm < self.stop_criteria.grad_norm:
            return MinimizeResult(x, MinimizerStatus.CONVERGED, self.stop_criteria.iterations, f, gnorm)
        return MinimizeResult(x, MinimizerStatus.MAX_ITERATIONS, self.stop_criteria.iterations, f, gnorm,
                'reached the maximum number of iterations')
