"""
Augmented Lagrangian solve of Dirichlet-constrained problems.

Applying the Dirichlet values directly can produce an invalid or
intersecting configuration. `ALSolver` first drives the free system toward
the boundary values with a penalty and a Lagrange multiplier term, raising
the penalty weight while the constraint error does not drop fast enough.
Once the projected configuration is feasible, a last solve runs in the
reduced space with the Dirichlet dofs removed.
"""
import math
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import numpy as np
import matplotlib.pyplot as plt

from .. import logger
from ..config import al_solver_options, check_al_solver_options
from ..typing import TensorLike
from .forms import BCLagrangianForm, BCPenaltyForm
from .minimizer import MinimizerStallError, MinimizeResult, MinimizerStatus
from .nl_problem import NLProblem


class ALSolverError(RuntimeError):
    pass


class ALPhase(Enum):
    ESCALATING = 'escalating'
    ACCEPTED = 'accepted'
    REDUCED = 'reduced'
    FAILED = 'failed'


class ConstraintMode(Enum):
    FULL_SPACE_ENFORCED = 'full'
    REDUCED_SPACE_FREE = 'reduced'


class ALAction(Enum):
    ESCALATE = 'escalate'
    UPDATE_MULTIPLIER = 'update_multiplier'


@dataclass(frozen=True)
class ALState:
    al_weight: float
    steps: int = 0


def al_transition(state: ALState, eta: float, eta_tol: float,
                  max_al_weight: float, scaling: float) -> Tuple[ALState, ALAction]:
    """
    Next outer state of the AL loop.

    The weight grows by `scaling` (capped at `max_al_weight`) while the
    relative error reduction `eta` stays below `eta_tol` and the cap is not
    reached; otherwise the multiplier is updated with the current weight.
    """
    if eta < eta_tol and state.al_weight < max_al_weight:
        weight = min(state.al_weight*scaling, max_al_weight)
        return replace(state, al_weight=weight, steps=state.steps + 1), ALAction.ESCALATE
    return replace(state, steps=state.steps + 1), ALAction.UPDATE_MULTIPLIER


def relative_error_reduction(initial_error: float, current_error: float) -> float:
    if initial_error == 0:
        return 1.0 if current_error == 0 else -math.inf
    return 1 - math.sqrt(current_error/initial_error)


class ALSolver():
    """
    Augmented Lagrangian driver around a minimizer.

    Parameters:
        lagr_form (BCLagrangianForm): Multiplier term on the Dirichlet dofs.
        pen_form (BCPenaltyForm): Penalty term on the Dirichlet dofs.
        initial_al_weight (float): Penalty weight of the first sub-solve.
        scaling (float): Factor applied to the weight when escalating.
        max_al_weight (float): Upper bound of the weight.
        eta_tol (float): Required relative error reduction.
        update_barrier_stiffness (Callable): Called with the full iterate
            before every minimization.
        post_subsolve (Callable | None): Called with the weight after every
            sub-solve (0 after the reduced solve).
        max_al_steps (int | None): Limit on outer iterations.
    """
    def __init__(self, lagr_form: BCLagrangianForm, pen_form: BCPenaltyForm,
                 initial_al_weight: float, scaling: float, max_al_weight: float, eta_tol: float,
                 update_barrier_stiffness: Callable[[TensorLike], None],
                 post_subsolve: Optional[Callable[[float], None]] = None,
                 max_al_steps: Optional[int] = None):
        check_al_solver_options(dict(initial_al_weight=initial_al_weight, scaling=scaling,
                max_al_weight=max_al_weight, eta_tol=eta_tol, max_al_steps=max_al_steps))
        self.lagr_form = lagr_form
        self.pen_form = pen_form
        self.initial_al_weight = initial_al_weight
        self.scaling = scaling
        self.max_al_weight = max_al_weight
        self.eta_tol = eta_tol
        self.update_barrier_stiffness = update_barrier_stiffness
        self.post_subsolve = post_subsolve if post_subsolve is not None else (lambda al_weight: None)
        self.max_al_steps = max_al_steps

        self.phase: Optional[ALPhase] = None
        self.history: List[Dict[str, Any]] = []
        self.failure_count = 0
        self.last_failure: Optional[str] = None
        self.last_solution: Optional[TensorLike] = None

    @classmethod
    def get_options(cls, *, initial_al_weight: float = 1e6, scaling: float = 2.0,
                    max_al_weight: float = 1e11, eta_tol: float = 0.99,
                    max_al_steps: Optional[int] = None) -> Dict[str, Any]:
        return al_solver_options(initial_al_weight=initial_al_weight, scaling=scaling,
                max_al_weight=max_al_weight, eta_tol=eta_tol, max_al_steps=max_al_steps)

    @classmethod
    def from_options(cls, lagr_form, pen_form, options: Dict[str, Any],
                     update_barrier_stiffness=lambda x: None, post_subsolve=None):
        options = check_al_solver_options(options)
        return cls(lagr_form, pen_form, options["initial_al_weight"], options["scaling"],
                options["max_al_weight"], options["eta_tol"], update_barrier_stiffness,
                post_subsolve=post_subsolve, max_al_steps=options["max_al_steps"])

    def set_constraint_mode(self, nl_problem: NLProblem, x: TensorLike,
                            mode: ConstraintMode, al_weight: float = -1):
        if self.pen_form is None or self.lagr_form is None:
            return
        if mode == ConstraintMode.FULL_SPACE_ENFORCED:
            self.pen_form.enable()
            self.lagr_form.enable()
            self.pen_form.set_weight(al_weight)
            nl_problem.use_full_size()
            nl_problem.set_apply_DBC(x, False)
        else:
            self.pen_form.disable()
            self.lagr_form.disable()
            nl_problem.use_reduced_size()
            nl_problem.set_apply_DBC(x, True)

    def set_al_weight(self, nl_problem: NLProblem, x: TensorLike, weight: float):
        """A positive weight enforces the constraints in full space, -1 frees them."""
        mode = ConstraintMode.FULL_SPACE_ENFORCED if weight > 0 else ConstraintMode.REDUCED_SPACE_FREE
        self.set_constraint_mode(nl_problem, x, mode, weight)

    def is_feasible(self, nl_problem: NLProblem, sol: TensorLike, tmp_sol: TensorLike) -> bool:
        return (np.isfinite(nl_problem.value(tmp_sol))
                and nl_problem.is_step_valid(sol, tmp_sol)
                and nl_problem.is_step_collision_free(sol, tmp_sol))

    def _minimize(self, nl_solver, nl_problem, x) -> MinimizeResult:
        try:
            return nl_solver.minimize(nl_problem, x)
        except MinimizerStallError as e:
            x = e.solution if e.solution is not None else x
            return MinimizeResult(x, MinimizerStatus.STALLED, message=str(e))

    def solve_al(self, nl_solver, nl_problem: NLProblem, sol: TensorLike) -> TensorLike:
        """
        Run the outer AL loop until the Dirichlet values can be applied
        directly, and return the full solution.
        """
        sol = np.asarray(sol, dtype=np.float64).copy()
        if len(sol) != nl_problem.full_size():
            raise ValueError(f"Expected a full solution of size {nl_problem.full_size()}, got {len(sol)}.")

        initial_sol = sol.copy()
        self.history = []
        self.phase = ALPhase.ESCALATING
        state = ALState(self.initial_al_weight)
        iters = nl_solver.stop_criteria.iterations

        self.set_al_weight(nl_problem, sol, -1)
        initial_error = self.pen_form.compute_error(sol)
        tmp_sol = nl_problem.full_to_reduced(sol)

        try:
            nl_problem.line_search_begin(sol, tmp_sol)
            while not self.is_feasible(nl_problem, sol, tmp_sol):
                nl_problem.line_search_end()
                if self.max_al_steps is not None and state.steps >= self.max_al_steps:
                    self.phase = ALPhase.FAILED
                    raise ALSolverError(f"Augmented lagrangian did not reach a feasible state in {state.steps} steps.")

                al_weight = state.al_weight
                self.set_al_weight(nl_problem, sol, al_weight)
                logger.debug(f"Solving AL Problem with weight {al_weight}")

                nl_problem.init(sol)
                self.update_barrier_stiffness(sol)
                result = self._minimize(nl_solver, nl_problem, sol)
                stalled = result.status == MinimizerStatus.STALLED
                if stalled:
                    self.failure_count += 1
                    self.last_failure = result.message
                    logger.debug(f"AL sub-solve stalled: {result.message}")

                sol = np.asarray(result.x, dtype=np.float64).copy()
                self.set_al_weight(nl_problem, sol, -1)

                current_error = self.pen_form.compute_error(sol)
                eta = relative_error_reduction(initial_error, current_error)
                logger.debug(f"Current eta = {eta}")

                if eta < 0:
                    logger.debug("Higher error than initial, increase weight and revert to previous solution")
                    sol = initial_sol.copy()

                tmp_sol = nl_problem.full_to_reduced(sol)
                nl_problem.line_search_begin(sol, tmp_sol)

                state, action = al_transition(state, eta, self.eta_tol, self.max_al_weight, self.scaling)
                if action == ALAction.UPDATE_MULTIPLIER:
                    self.lagr_form.update_lagrangian(sol, al_weight)

                self.post_subsolve(state.al_weight)
                self.history.append({
                    'weight': al_weight, 'eta': eta, 'error': current_error,
                    'action': action.value, 'stalled': stalled})
            nl_problem.line_search_end()
        finally:
            nl_solver.stop_criteria.iterations = iters

        self.phase = ALPhase.ACCEPTED
        self.last_solution = sol
        return sol

    def solve_reduced(self, nl_solver, nl_problem: NLProblem, sol: TensorLike) -> TensorLike:
        """Minimize with the Dirichlet dofs removed, starting from a feasible `sol`."""
        sol = np.asarray(sol, dtype=np.float64)
        self.set_al_weight(nl_problem, sol, -1)
        tmp_sol = nl_problem.full_to_reduced(sol)

        nl_problem.line_search_begin(sol, tmp_sol)
        feasible = self.is_feasible(nl_problem, sol, tmp_sol)
        nl_problem.line_search_end()
        if not feasible:
            self.phase = ALPhase.FAILED
            raise ALSolverError("Failed to apply boundary conditions; solve with augmented lagrangian first!")

        logger.debug("Successfully applied boundary conditions; solving in reduced space")

        nl_problem.init(sol)
        self.update_barrier_stiffness(sol)
        result = self._minimize(nl_solver, nl_problem, tmp_sol)
        sol = nl_problem.reduced_to_full(result.x)
        self.last_solution = sol

        if not result.success:
            self.phase = ALPhase.FAILED
            self.failure_count += 1
            self.last_failure = result.message
            raise MinimizerStallError(f"Reduced solve failed: {result.message}", solution=sol)

        self.phase = ALPhase.REDUCED
        self.post_subsolve(0)
        return sol

    def solve(self, nl_solver, nl_problem: NLProblem, sol: TensorLike) -> TensorLike:
        sol = self.solve_al(nl_solver, nl_problem, sol)
        return self.solve_reduced(nl_solver, nl_problem, sol)

    def plot_curve(self, label="constraint error"):
        """Plot the constraint error and the penalty weight of every AL step."""
        error = [h['error'] for h in self.history]
        weight = [h['weight'] for h in self.history]
        plt.semilogy(error, label=label)
        plt.semilogy(weight, label="al weight")
        plt.xlabel('AL step')
        plt.title("Augmented lagrangian convergence")
        plt.legend()
        plt.show()
