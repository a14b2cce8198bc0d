from typing import Iterable

import numpy as np

from ..parameter import Parameter
from ..state import SimulationState
from ..typing import TensorLike


def zero_adjoint_rhs(state: SimulationState) -> TensorLike:
    """Zero forcing with one column per cached step (at least one)."""
    return np.zeros((state.ndof(), max(len(state.diff_cached), 1)), dtype=np.float64)


class Objective():
    """
    Differentiable scalar functional of simulation states and parameters.

    Subclasses implement `value`, `compute_adjoint_rhs` and
    `compute_partial_gradient`. The partial gradient is the direct
    sensitivity with the state map held fixed; the part mediated by the state
    goes through the adjoint solve driven by `compute_adjoint_rhs`.
    """
    def value(self) -> float:
        raise NotImplementedError

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        """Adjoint forcing, shape (ndof, number of steps)."""
        raise NotImplementedError

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        """Direct derivative w.r.t. `param`, shape (param.full_dim, )."""
        raise NotImplementedError

    @staticmethod
    def compute_adjoint_term(state: SimulationState, param: Parameter) -> TensorLike:
        term = np.zeros(param.full_dim, dtype=np.float64)
        if param.contains_state(state):
            if not state.adjoint_solved():
                raise RuntimeError("The adjoint problem must be solved before computing the adjoint term.")
            term += state.compute_adjoint_term(param)
        return term

    def total_gradient(self, param: Parameter, states: Iterable[SimulationState]) -> TensorLike:
        """Partial gradient plus the adjoint terms of `states`."""
        grad = self.compute_partial_gradient(param).copy()
        for state in states:
            grad += self.compute_adjoint_term(state, param)
        return grad


class StaticObjective(Objective):
    """Objective evaluated at a single time step."""
    def __init__(self):
        self.time_step = 0

    def set_time_step(self, time_step: int):
        self.time_step = time_step

    def get_time_step(self) -> int:
        return self.time_step

    def compute_adjoint_rhs_step(self, state: SimulationState) -> TensorLike:
        raise NotImplementedError

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        term = zero_adjoint_rhs(state)
        if self.time_step >= term.shape[1]:
            raise IndexError(f"Time step {self.time_step} is not cached ({len(state.diff_cached)} cached steps).")
        term[:, self.time_step] = self.compute_adjoint_rhs_step(state)
        return term
