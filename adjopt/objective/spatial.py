from typing import Any, Mapping, Optional, Set

import numpy as np

from .. import logger
from ..config import get_id_selection, get_power
from ..constitutive import (UnknownFormulationError, compute_stress,
        stress_transpose_product, stress_lame_derivative)
from ..functional import IntegrableFunctional, QuadratureBatch, Slot
from ..integral_alg import SpatialIntegralAlg
from ..parameter import (Parameter, ShapeParameter, ElasticParameter,
        TopologyOptimizationParameter)
from ..state import SimulationState
from ..typing import TensorLike
from .base import StaticObjective


def _safe_power(x, e):
    out = np.zeros_like(x, dtype=np.float64)
    np.power(x, e, out=out, where=x > 0)
    return out


class SpatialIntegralObjective(StaticObjective):
    """
    Integral of a functional over the cells of the selected bodies
    ('volume_selection') or the selected boundary faces ('surface_selection')
    at one time step.

    Parameters:
        state (SimulationState): The simulation whose cached field is integrated.
        shape_param (ShapeParameter | None): Shape parameter of `state`.
        args (Mapping): Objective arguments.
        elastic_param (ElasticParameter | None): Material parameter of `state`.
        topo_param (TopologyOptimizationParameter | None): Density parameter of `state`.
    """
    def __init__(self, state: SimulationState, shape_param: Optional[ShapeParameter],
                 args: Mapping[str, Any],
                 elastic_param: Optional[ElasticParameter] = None,
                 topo_param: Optional[TopologyOptimizationParameter] = None):
        super().__init__()
        self.state = state
        self.shape_param = shape_param
        self.elastic_param = elastic_param
        self.topo_param = topo_param

        if "surface_selection" in args and "volume_selection" not in args:
            self.spatial_integral_type = 'surface'
            self.interested_ids = get_id_selection(args, "surface_selection")
        else:
            self.spatial_integral_type = 'volume'
            self.interested_ids = get_id_selection(args, "volume_selection")

        self.alg = SpatialIntegralAlg(state, q=args.get("quadrature_order", 2),
                nthreads=args.get("nthreads", None))

    def get_integral_functional(self) -> IntegrableFunctional:
        raise NotImplementedError

    def _solution(self) -> TensorLike:
        return self.state.solution(self.time_step)

    def value(self) -> float:
        return self.alg.integrate(self.get_integral_functional(), self._solution(),
                self.interested_ids, self.spatial_integral_type, self.time_step)

    def compute_adjoint_rhs_step(self, state: SimulationState) -> TensorLike:
        if state is not self.state:
            return np.zeros(state.ndof(), dtype=np.float64)
        return self.alg.dj_du(self.get_integral_functional(), self._solution(),
                self.interested_ids, self.spatial_integral_type, self.time_step)

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        term = np.zeros(param.full_dim, dtype=np.float64)
        if param.same_as(self.shape_param):
            term += self.alg.dj_dx(self.get_integral_functional(), self._solution(),
                    self.interested_ids, self.spatial_integral_type, self.time_step)
        elif param.same_as(self.elastic_param):
            term += self._elastic_gradient()
        elif param.same_as(self.topo_param):
            term += self._topology_gradient()
        return term

    def _lame_gradient(self):
        return self.alg.dj_dlame(self.get_integral_functional(), self._solution(),
                self.interested_ids, self.spatial_integral_type, self.time_step)

    def _elastic_gradient(self) -> TensorLike:
        dl, dm = self._lame_gradient()
        f = self.state.lame.density_factor()
        return np.concatenate((f*dl, f*dm))

    def _topology_gradient(self) -> TensorLike:
        lame = self.state.lame
        dl, dm = self._lame_gradient()
        lam, mu = lame.lambda_mu(with_density=False)
        p = lame.density_power
        return p*lame.density**(p - 1)*(lam*dl + mu*dm)


class StressFunctional(IntegrableFunctional):
    """``|stress|^p`` for a given constitutive law."""
    slots = frozenset({Slot.VALUE, Slot.DJ_DGRADU, Slot.DJ_DLAME})

    def __init__(self, formulation: str, power: float):
        self.formulation = formulation
        self.power = power

    def _stress(self, batch: QuadratureBatch):
        stress = compute_stress(self.formulation, batch.grad_u, batch.lam, batch.mu)
        return stress, np.einsum('...ij, ...ij->...', stress, stress)

    def j(self, batch):
        _, sq = self._stress(batch)
        return _safe_power(sq, self.power/2)

    def dj_dgradu(self, batch):
        stress, sq = self._stress(batch)
        coef = self.power*_safe_power(sq, self.power/2 - 1)
        B = stress_transpose_product(self.formulation, batch.grad_u, batch.lam, batch.mu, stress)
        return coef[..., None, None]*B

    def dj_dlame(self, batch):
        stress, sq = self._stress(batch)
        coef = self.power*_safe_power(sq, self.power/2 - 1)
        dsl, dsm = stress_lame_derivative(self.formulation, batch.grad_u)
        dl = coef*np.einsum('...ij, ...ij->...', stress, dsl)
        dm = coef*np.einsum('...ij, ...ij->...', stress, dsm)
        return dl, dm


class StressObjective(SpatialIntegralObjective):
    """
    Integral of ``|stress|^p``, optionally followed by the outer root
    ``(.)^(1/p)``.
    """
    def __init__(self, state: SimulationState, shape_param: Optional[ShapeParameter],
                 elastic_param: Optional[ElasticParameter], args: Mapping[str, Any],
                 has_integral_sqrt: bool = False,
                 topo_param: Optional[TopologyOptimizationParameter] = None):
        super().__init__(state, shape_param, args, elastic_param=elastic_param, topo_param=topo_param)
        self.formulation = state.formulation()
        if self.formulation not in ('Laplacian', 'LinearElasticity', 'NeoHookean'):
            raise UnknownFormulationError(f"Unknown formulation '{self.formulation}'!")
        self.in_power = get_power(args)
        self.out_sqrt = has_integral_sqrt

    def get_integral_functional(self):
        return StressFunctional(self.formulation, self.in_power)

    def value(self) -> float:
        val = super().value()
        if self.out_sqrt:
            return val**(1./self.in_power)
        return val

    def _root_factor(self) -> float:
        val = SpatialIntegralObjective.value(self)
        if abs(val) < 1e-12:
            logger.warning("stress integral too small, may result in NAN grad!")
        with np.errstate(divide='ignore'):
            return np.power(np.float64(val), 1./self.in_power - 1)/self.in_power

    def compute_adjoint_rhs_step(self, state: SimulationState) -> TensorLike:
        rhs = super().compute_adjoint_rhs_step(state)
        if self.out_sqrt and state is self.state:
            return self._root_factor()*rhs
        return rhs

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        term = super().compute_partial_gradient(param)
        if self.out_sqrt and np.any(term != 0):
            return self._root_factor()*term
        return term


class ComplianceFunctional(IntegrableFunctional):
    """``stress : grad u`` of linear elasticity."""
    slots = frozenset({Slot.VALUE, Slot.DJ_DGRADU, Slot.DJ_DLAME})

    def j(self, batch):
        stress = compute_stress('LinearElasticity', batch.grad_u, batch.lam, batch.mu)
        return np.einsum('...ij, ...ij->...', stress, batch.grad_u)

    def dj_dgradu(self, batch):
        return 2*compute_stress('LinearElasticity', batch.grad_u, batch.lam, batch.mu)

    def dj_dlame(self, batch):
        G = batch.grad_u
        tr = np.einsum('...ii->...', G)
        return tr**2, np.einsum('...ij, ...ij->...', G + np.swapaxes(G, -1, -2), G)


class ComplianceObjective(SpatialIntegralObjective):
    """
    Compliance ``int stress : grad u``. The gradient w.r.t. a SIMP density is
    ``p rho_e^(p-1) int_e stress0 : grad u`` with the unpenalized stress.
    """
    def __init__(self, state: SimulationState, shape_param: Optional[ShapeParameter],
                 elastic_param: Optional[ElasticParameter],
                 topo_param: Optional[TopologyOptimizationParameter], args: Mapping[str, Any]):
        super().__init__(state, shape_param, args, elastic_param=elastic_param, topo_param=topo_param)
        self.formulation = state.formulation()
        if self.formulation != 'LinearElasticity':
            raise UnknownFormulationError(f"Unknown formulation '{self.formulation}'!")

    def get_integral_functional(self):
        return ComplianceFunctional()

    def _topology_gradient(self) -> TensorLike:
        lame = self.state.lame
        p = lame.density_power
        e = self.alg.entity_integral(self.get_integral_functional(), self._solution(),
                self.interested_ids, self.spatial_integral_type, self.time_step, with_density=False)
        return p*lame.density**(p - 1)*e


class PositionFunctional(IntegrableFunctional):
    slots = frozenset({Slot.VALUE, Slot.DJ_DU, Slot.DJ_DX})

    def __init__(self, dim: int):
        self.dim = dim

    def j(self, batch):
        return batch.u[..., self.dim] + batch.pts[..., self.dim]

    def dj_du(self, batch):
        val = np.zeros_like(batch.u)
        val[..., self.dim] = 1
        return val

    def dj_dx(self, batch):
        val = np.zeros_like(batch.pts)
        val[..., self.dim] = 1
        return val


class PositionObjective(SpatialIntegralObjective):
    """Integral of the deformed coordinate ``u_d + x_d`` along axis `dim`."""
    def __init__(self, state: SimulationState, shape_param: Optional[ShapeParameter],
                 args: Mapping[str, Any], dim: int = 0):
        super().__init__(state, shape_param, args)
        if state.is_scalar():
            raise ValueError("PositionObjective needs a vector-valued displacement field.")
        self.set_dim(dim)

    def set_dim(self, dim: int):
        GD = self.state.mesh.geo_dimension()
        if not 0 <= dim < GD:
            raise ValueError(f"Coordinate axis {dim} out of range for dimension {GD}.")
        self.dim = dim

    def get_integral_functional(self):
        return PositionFunctional(self.dim)


class TargetFunctional(IntegrableFunctional):
    """Squared distance between deformed points and their reference images."""
    slots = frozenset({Slot.VALUE, Slot.DJ_DU, Slot.DJ_DX})

    def __init__(self, target_state: SimulationState, e_to_ref_e: Mapping[int, int]):
        self.target_state = target_state
        self.e_to_ref_e = e_to_ref_e

    def _reference(self, batch):
        ref = self.target_state
        e_ref = np.array([self.e_to_ref_e.get(int(e), int(e)) for e in batch.elements], dtype=np.int_)
        step = batch.params['step'] if ref.is_time_dependent() else 0
        pts_ref, u_ref = ref.interpolate(step, e_ref, batch.local_pts)
        return u_ref + pts_ref

    def j(self, batch):
        x = (batch.u + batch.pts) - self._reference(batch)
        return np.einsum('...d, ...d->...', x, x)

    def dj_du(self, batch):
        return 2*((batch.u + batch.pts) - self._reference(batch))

    def dj_dx(self, batch):
        return self.dj_du(batch)


class TargetObjective(SpatialIntegralObjective):
    """
    Squared mismatch between the deformed configuration of `state` and the
    one of a reference simulation, compared element by element.
    """
    def __init__(self, state: SimulationState, shape_param: Optional[ShapeParameter], args: Mapping[str, Any]):
        super().__init__(state, shape_param, args)
        self.target_state: Optional[SimulationState] = None
        self.e_to_ref_e = {}

    def set_reference(self, target_state: SimulationState, reference_cached_body_ids: Set[int] = frozenset()):
        """
        Pair the selected elements of `state` with the ones of `target_state`.

        Elements are grouped by body id and paired in enumeration order, so
        both meshes must enumerate the same ordered set of elements per body.
        """
        if target_state.mesh.cell.shape[1] != self.state.mesh.cell.shape[1]:
            raise ValueError("The reference simulation uses a different element type.")

        def group(mesh):
            body_to_e = {}
            for e, body_id in enumerate(mesh.body_id):
                body_id = int(body_id)
                if len(reference_cached_body_ids) > 0 and body_id not in reference_cached_body_ids:
                    continue
                body_to_e.setdefault(body_id, []).append(e)
            return body_to_e

        ref_body_to_e = group(target_state.mesh)
        body_to_e = group(self.state.mesh)
        count = sum(len(v) for v in body_to_e.values())
        ref_count = sum(len(v) for v in ref_body_to_e.values())

        if count != ref_count or any(len(v) != len(ref_body_to_e.get(k, [])) for k, v in body_to_e.items()):
            raise ValueError("Number of interested elements in the reference and optimization examples do not match!")
        logger.info(f"Found {count} matching elements.")

        self.target_state = target_state
        self.e_to_ref_e = {}
        for body_id, es in body_to_e.items():
            for e, e_ref in zip(es, ref_body_to_e[body_id]):
                self.e_to_ref_e[e] = e_ref

    def get_integral_functional(self):
        if self.target_state is None:
            raise RuntimeError("TargetObjective has no reference; call set_reference first.")
        if len(self.target_state.diff_cached) == 0:
            raise RuntimeError("The reference simulation has no cached solution.")
        return TargetFunctional(self.target_state, self.e_to_ref_e)
