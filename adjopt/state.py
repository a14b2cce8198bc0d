from dataclasses import dataclass, field
from typing import Callable, List, Optional

import numpy as np

from .mesh import SimplexMesh
from .typing import TensorLike, Index, _S

FORMULATIONS = ('Laplacian', 'LinearElasticity', 'NeoHookean')


@dataclass
class DiffCache:
    """Cached solution of one time step."""
    u: TensorLike
    forward_solved: bool = True
    adjoint_solved: bool = False
    adjoint: Optional[TensorLike] = None


class LameParameters():
    """
    Per-cell Lamé parameters with optional SIMP density penalization.

    With a density ``rho`` the effective parameters of cell ``e`` are
    ``rho_e**p * (lambda_e, mu_e)`` where ``p`` is `density_power`.
    """
    def __init__(self, lam, mu, NC: int, density: Optional[TensorLike] = None, density_power: float = 3.0):
        self.lam = np.broadcast_to(np.asarray(lam, dtype=np.float64), (NC, )).copy()
        self.mu = np.broadcast_to(np.asarray(mu, dtype=np.float64), (NC, )).copy()
        self.density = None if density is None else np.asarray(density, dtype=np.float64).copy()
        self.density_power = density_power

    @classmethod
    def from_young_poisson(cls, E, nu, NC: int, **kwargs):
        lam = nu*E/((1 + nu)*(1 - 2*nu))
        mu = E/(2*(1 + nu))
        return cls(lam, mu, NC, **kwargs)

    def density_factor(self, index: Index = _S):
        if self.density is None:
            return np.ones_like(self.lam[index])
        return self.density[index]**self.density_power

    def lambda_mu(self, index: Index = _S, with_density: bool = True):
        if not with_density:
            return self.lam[index], self.mu[index]
        f = self.density_factor(index)
        return f*self.lam[index], f*self.mu[index]


class SimulationState():
    """
    Forward simulation data consumed by objectives.

    The state owns a P1 discretization on a `SimplexMesh` and the displacement
    history `diff_cached`. Field values are stored node-major: the dof of node
    ``i`` and component ``k`` is ``i*VD + k``.

    Parameters:
        mesh (SimplexMesh): The discretized domain.
        formulation (str): One of 'Laplacian', 'LinearElasticity', 'NeoHookean'.
        lame (LameParameters | None): Material parameters; defaults to unit values.
        time_steps (int): Number of time steps of a transient problem, 0 if static.
        dt (float): Time step size.
        adjoint_term (Callable | None): Hook ``(state, param) -> vector`` that
            returns the adjoint contribution to the gradient with respect to
            `param` once the adjoint equations are solved.
    """
    def __init__(self, mesh: SimplexMesh, formulation: str = 'LinearElasticity',
                 lame: Optional[LameParameters] = None,
                 time_steps: int = 0, dt: float = 1.0,
                 adjoint_term: Optional[Callable] = None):
        if formulation not in FORMULATIONS:
            raise ValueError(f"Unknown formulation '{formulation}'.")
        self.mesh = mesh
        self._formulation = formulation
        NC = mesh.number_of_cells()
        self.lame = lame if lame is not None else LameParameters(1.0, 1.0, NC)
        self.time_steps = time_steps
        self.dt = dt
        self.diff_cached: List[DiffCache] = []
        self._adjoint_term = adjoint_term

    def formulation(self) -> str:
        return self._formulation

    def is_scalar(self) -> bool:
        return self._formulation == 'Laplacian'

    def is_time_dependent(self) -> bool:
        return self.time_steps > 0

    def value_dimension(self) -> int:
        return 1 if self.is_scalar() else self.mesh.geo_dimension()

    def ndof(self) -> int:
        return self.mesh.number_of_nodes()*self.value_dimension()

    def cache_step(self, u: TensorLike, step: Optional[int] = None):
        """Store the solution of a step; appends when `step` is None."""
        u = np.asarray(u, dtype=np.float64).reshape(-1)
        if u.shape[0] != self.ndof():
            raise ValueError(f"Solution has {u.shape[0]} dofs, expected {self.ndof()}.")
        if step is None or step == len(self.diff_cached):
            self.diff_cached.append(DiffCache(u))
        else:
            self.diff_cached[step] = DiffCache(u)

    def solution(self, step: int) -> TensorLike:
        if not 0 <= step < len(self.diff_cached):
            raise IndexError(f"Time step {step} is not cached ({len(self.diff_cached)} cached steps).")
        return self.diff_cached[step].u

    def adjoint_solved(self) -> bool:
        return len(self.diff_cached) > 0 and all(c.adjoint_solved for c in self.diff_cached)

    def set_adjoint(self, adjoints: TensorLike):
        """Store adjoint solutions, one column per cached step."""
        adjoints = np.asarray(adjoints).reshape(self.ndof(), -1)
        for i, c in enumerate(self.diff_cached):
            c.adjoint = adjoints[:, i]
            c.adjoint_solved = True

    def compute_adjoint_term(self, param) -> TensorLike:
        if self._adjoint_term is None:
            raise NotImplementedError("This state has no adjoint term hook.")
        return np.asarray(self._adjoint_term(self, param), dtype=np.float64)

    def interpolate(self, step: int, cells: TensorLike, bcs: TensorLike):
        """
        Evaluate geometry and field at barycentric points of given cells.

        Parameters:
            step (int): Cached step of the field.
            cells (TensorLike): Cell indices, shape (NE, ).
            bcs (TensorLike): Barycentric points, shape (NE, NQ, TD+1).

        Returns:
            tuple: physical points (NE, NQ, GD) and field values (NE, NQ, VD).
        """
        mesh = self.mesh
        VD = self.value_dimension()
        cell = mesh.entity('cell', cells)
        U = self.solution(step).reshape(-1, VD)
        pts = np.einsum('eqj, ejd->eqd', bcs, mesh.node[cell])
        u = np.einsum('eqj, ejk->eqk', bcs, U[cell])
        return pts, u
