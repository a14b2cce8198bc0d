"""
Energy forms assembled by `NLProblem`.

Every form is evaluated on the full vector of unknowns. A disabled form
contributes neither value nor gradient.
"""
from typing import Optional

import numpy as np

from ..typing import TensorLike


class Form():
    def __init__(self):
        self.enabled = True
        self.weight = 1.0

    def enable(self):
        self.enabled = True

    def disable(self):
        self.enabled = False

    def is_enabled(self) -> bool:
        return self.enabled

    def set_weight(self, weight: float):
        self.weight = weight

    def value(self, x: TensorLike) -> float:
        if not self.enabled:
            return 0.0
        return self.weight*self.value_unweighted(x)

    def first_derivative(self, x: TensorLike) -> TensorLike:
        if not self.enabled:
            return np.zeros_like(x, dtype=np.float64)
        return self.weight*self.first_derivative_unweighted(x)

    def value_unweighted(self, x: TensorLike) -> float:
        raise NotImplementedError

    def first_derivative_unweighted(self, x: TensorLike) -> TensorLike:
        raise NotImplementedError

    def init(self, x: TensorLike):
        pass

    def line_search_begin(self, x0: TensorLike, x1: TensorLike):
        pass

    def line_search_end(self):
        pass

    def is_step_valid(self, x0: TensorLike, x1: TensorLike) -> bool:
        return True

    def is_step_collision_free(self, x0: TensorLike, x1: TensorLike) -> bool:
        return True


class QuadraticForm(Form):
    """``1/2 x^T A x - b^T x`` with a dense or sparse matrix `A`."""
    def __init__(self, A, b: Optional[TensorLike] = None):
        super().__init__()
        self.A = A
        self.b = np.zeros(A.shape[0], dtype=np.float64) if b is None else np.asarray(b, dtype=np.float64)

    def value_unweighted(self, x):
        return float(0.5*np.dot(x, self.A @ x) - np.dot(self.b, x))

    def first_derivative_unweighted(self, x):
        return np.asarray(self.A @ x).reshape(-1) - self.b


class _BCForm(Form):
    def __init__(self, dirichlet_dofs: TensorLike, dirichlet_values: TensorLike):
        super().__init__()
        self.dirichlet_dofs = np.asarray(dirichlet_dofs, dtype=np.int_)
        self.dirichlet_values = np.broadcast_to(
                np.asarray(dirichlet_values, dtype=np.float64), self.dirichlet_dofs.shape).copy()

    def residual(self, x: TensorLike) -> TensorLike:
        return x[self.dirichlet_dofs] - self.dirichlet_values


class BCPenaltyForm(_BCForm):
    """Quadratic penalty ``w/2 |x_D - g|^2`` on the Dirichlet dofs."""
    def value_unweighted(self, x):
        r = self.residual(x)
        return 0.5*float(np.dot(r, r))

    def first_derivative_unweighted(self, x):
        grad = np.zeros_like(x, dtype=np.float64)
        grad[self.dirichlet_dofs] = self.residual(x)
        return grad

    def compute_error(self, x: TensorLike) -> float:
        r = self.residual(x)
        return float(np.dot(r, r))


class BCLagrangianForm(_BCForm):
    """Multiplier term ``-lambda . (x_D - g)`` updated by dual ascent."""
    def __init__(self, dirichlet_dofs: TensorLike, dirichlet_values: TensorLike):
        super().__init__(dirichlet_dofs, dirichlet_values)
        self.lagr_mults = np.zeros(len(self.dirichlet_dofs), dtype=np.float64)

    def value_unweighted(self, x):
        return -float(np.dot(self.lagr_mults, self.residual(x)))

    def first_derivative_unweighted(self, x):
        grad = np.zeros_like(x, dtype=np.float64)
        grad[self.dirichlet_dofs] = -self.lagr_mults
        return grad

    def compute_error(self, x: TensorLike) -> float:
        r = self.residual(x)
        return float(np.dot(r, r))

    def update_lagrangian(self, x: TensorLike, k_al: float):
        self.lagr_mults -= k_al*self.residual(x)
