from typing import Callable, Optional, Sequence

import numpy as np

from ..typing import TensorLike
from .forms import Form

StepPredicate = Callable[[TensorLike, TensorLike], bool]


class NLProblem():
    """
    Sum of energy forms with a full and a reduced view of the unknowns.

    In the full view all dofs are free. In the reduced view the Dirichlet dofs
    are removed and `reduced_to_full` fills them either with the boundary
    values (when DBC are applied) or with the values of the vector passed to
    `set_apply_DBC`.

    Parameters:
        forms (Sequence[Form]): Energy terms.
        full_size (int): Number of dofs.
        dirichlet_dofs (TensorLike): Constrained dofs.
        dirichlet_values (TensorLike): Their boundary values.
        is_valid (Callable | None): Extra predicate ``(x0, x1) -> bool`` on
            full vectors, e.g. an inversion check.
        is_collision_free (Callable | None): Predicate ``(x0, x1) -> bool``
            telling whether the straight step is free of intersections.
    """
    def __init__(self, forms: Sequence[Form], full_size: int,
                 dirichlet_dofs: TensorLike, dirichlet_values: TensorLike,
                 is_valid: Optional[StepPredicate] = None,
                 is_collision_free: Optional[StepPredicate] = None):
        self.forms = list(forms)
        self._full_size = full_size
        self.dirichlet_dofs = np.asarray(dirichlet_dofs, dtype=np.int_)
        self.dirichlet_values = np.broadcast_to(
                np.asarray(dirichlet_values, dtype=np.float64), self.dirichlet_dofs.shape).copy()
        self.free_dofs = np.setdiff1d(np.arange(full_size), self.dirichlet_dofs)
        self._is_valid = is_valid
        self._is_collision_free = is_collision_free

        self.full_mode = False
        self.apply_DBC = True
        self._boundary_values = self.dirichlet_values.copy()

    def full_size(self) -> int:
        return self._full_size

    def reduced_size(self) -> int:
        return len(self.free_dofs)

    def current_size(self) -> int:
        return self.full_size() if self.full_mode else self.reduced_size()

    def use_full_size(self):
        self.full_mode = True

    def use_reduced_size(self):
        self.full_mode = False

    def set_apply_DBC(self, x: TensorLike, val: bool):
        self.apply_DBC = val
        if val:
            self._boundary_values = self.dirichlet_values.copy()
        else:
            self._boundary_values = np.asarray(x, dtype=np.float64)[self.dirichlet_dofs].copy()

    def full_to_reduced(self, x: TensorLike) -> TensorLike:
        return np.asarray(x, dtype=np.float64)[self.free_dofs].copy()

    def reduced_to_full(self, y: TensorLike) -> TensorLike:
        y = np.asarray(y, dtype=np.float64)
        if len(y) == self.full_size():
            return y.copy()
        x = np.zeros(self.full_size(), dtype=np.float64)
        x[self.free_dofs] = y
        x[self.dirichlet_dofs] = self._boundary_values
        return x

    def _to_full(self, x):
        return x if self.full_mode else self.reduced_to_full(x)

    def value(self, x: TensorLike) -> float:
        xf = self._to_full(x)
        return sum((form.value(xf) for form in self.forms), 0.0)

    def gradient(self, x: TensorLike) -> TensorLike:
        xf = self._to_full(x)
        grad = np.zeros(self.full_size(), dtype=np.float64)
        for form in self.forms:
            grad += form.first_derivative(xf)
        return grad if self.full_mode else self.full_to_reduced(grad)

    def is_step_valid(self, x0: TensorLike, x1: TensorLike) -> bool:
        f0, f1 = self.reduced_to_full(x0), self.reduced_to_full(x1)
        if self._is_valid is not None and not self._is_valid(f0, f1):
            return False
        return all(form.is_step_valid(f0, f1) for form in self.forms)

    def is_step_collision_free(self, x0: TensorLike, x1: TensorLike) -> bool:
        f0, f1 = self.reduced_to_full(x0), self.reduced_to_full(x1)
        if self._is_collision_free is not None and not self._is_collision_free(f0, f1):
            return False
        return all(form.is_step_collision_free(f0, f1) for form in self.forms)

    def line_search_begin(self, x0: TensorLike, x1: TensorLike):
        f0, f1 = self.reduced_to_full(x0), self.reduced_to_full(x1)
        for form in self.forms:
            form.line_search_begin(f0, f1)

    def line_search_end(self):
        for form in self.forms:
            form.line_search_end()

    def init(self, x: TensorLike):
        xf = self.reduced_to_full(x)
        for form in self.forms:
            form.init(xf)
