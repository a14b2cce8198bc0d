from typing import Any, Iterable, List, Mapping, Optional

import numpy as np

from ..config import check_transient_integral_type
from ..parameter import Parameter, ShapeParameter
from ..state import SimulationState
from ..typing import TensorLike
from .base import Objective, StaticObjective, zero_adjoint_rhs
from .spatial import PositionObjective
from .volume import VolumeObjective


def transient_quadrature_weights(time_steps: int, dt: float, rule: str) -> TensorLike:
    """
    Weights of the time integration rule, one per step ``0..time_steps``.

    Examples:
        >>> transient_quadrature_weights(4, 1.0, 'trapezoidal')
        array([0.5, 1. , 1. , 1. , 0.5])
    """
    check_transient_integral_type(rule, time_steps)
    weights = np.full(time_steps + 1, dt, dtype=np.float64)
    if rule == 'uniform':
        weights[0] = 0
    elif rule == 'trapezoidal':
        weights[0] = dt/2
        weights[-1] = dt/2
    elif rule == 'simpson':
        weights[1:-1:2] = dt*4/3
        weights[2:-1:2] = dt*2/4
        weights[0] = dt/3
        weights[-1] = dt/3
    elif rule == 'final':
        weights[:] = 0
        weights[-1] = 1
    else:
        weights[:] = 0
        weights[int(rule[5:])] = 1
    return weights


class SumObjective(Objective):
    """Sum of objectives."""
    def __init__(self, objs: Optional[Iterable[Objective]] = None):
        self.objs: List[Objective] = list(objs) if objs is not None else []

    def add(self, obj: Objective):
        self.objs.append(obj)

    def value(self) -> float:
        return sum((obj.value() for obj in self.objs), 0.0)

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        rhs = None
        for obj in self.objs:
            r = obj.compute_adjoint_rhs(state)
            rhs = r.copy() if rhs is None else rhs + r
        return zero_adjoint_rhs(state) if rhs is None else rhs

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        term = np.zeros(param.full_dim, dtype=np.float64)
        for obj in self.objs:
            term += obj.compute_partial_gradient(param)
        return term


class BarycenterTargetObjective(StaticObjective):
    """
    Squared distance between the deformed barycenter of the selected bodies
    and a target point.

    `target` has one row per time step, or a single row used for every step.
    """
    def __init__(self, state: SimulationState, shape_param: ShapeParameter,
                 args: Mapping[str, Any], target: TensorLike):
        super().__init__()
        self.dim = state.mesh.geo_dimension()
        self.target = np.atleast_2d(np.asarray(target, dtype=np.float64))
        if self.target.shape[1] != self.dim:
            raise ValueError(f"Barycenter target needs {self.dim} columns, got {self.target.shape[1]}.")

        self.objv = VolumeObjective(shape_param, args)
        self.objp = [PositionObjective(state, shape_param, args, dim=d) for d in range(self.dim)]

    def get_target(self) -> TensorLike:
        if self.target.shape[0] > 1:
            return self.target[self.time_step]
        return self.target[0]

    def set_time_step(self, time_step: int):
        super().set_time_step(time_step)
        for obj in self.objp:
            obj.set_time_step(time_step)

    def get_barycenter(self) -> TensorLike:
        volume = self.objv.value()
        return np.array([obj.value() for obj in self.objp])/volume

    def value(self) -> float:
        return float(np.sum((self.get_barycenter() - self.get_target())**2))

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        volume = self.objv.value()
        center = self.get_barycenter()
        r = center - self.get_target()

        term = np.sum(2*r*(-center/volume))*self.objv.compute_partial_gradient(param)
        for d, obj in enumerate(self.objp):
            term += (2.0/volume*r[d])*obj.compute_partial_gradient(param)
        return term

    def compute_adjoint_rhs_step(self, state: SimulationState) -> TensorLike:
        volume = self.objv.value()
        r = self.get_barycenter() - self.get_target()
        term = np.zeros(state.ndof(), dtype=np.float64)
        for d, obj in enumerate(self.objp):
            term += (2.0/volume*r[d])*obj.compute_adjoint_rhs_step(state)
        return term


class TransientObjective(Objective):
    """
    Time integral of a static objective over steps ``0..time_steps``.

    Parameters:
        time_steps (int): Number of time steps.
        dt (float): Step size.
        transient_integral_type (str): 'uniform', 'trapezoidal', 'simpson',
            'final' or 'step_k'.
        obj (StaticObjective): The objective evaluated at every step.
    """
    def __init__(self, time_steps: int, dt: float, transient_integral_type: str, obj: StaticObjective):
        check_transient_integral_type(transient_integral_type, time_steps)
        self.time_steps = time_steps
        self.dt = dt
        self.transient_integral_type = transient_integral_type
        self.obj = obj

    def get_transient_quadrature_weights(self) -> TensorLike:
        return transient_quadrature_weights(self.time_steps, self.dt, self.transient_integral_type)

    def value(self) -> float:
        weights = self.get_transient_quadrature_weights()
        value = 0.0
        for i in range(self.time_steps + 1):
            self.obj.set_time_step(i)
            value += weights[i]*self.obj.value()
        return value

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        weights = self.get_transient_quadrature_weights()
        terms = np.zeros((state.ndof(), self.time_steps + 1), dtype=np.float64)
        for i in range(self.time_steps + 1):
            self.obj.set_time_step(i)
            terms[:, i] = weights[i]*self.obj.compute_adjoint_rhs_step(state)
        return terms

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        weights = self.get_transient_quadrature_weights()
        term = np.zeros(param.full_dim, dtype=np.float64)
        for i in range(self.time_steps + 1):
            self.obj.set_time_step(i)
            term += weights[i]*self.obj.compute_partial_gradient(param)
        return term
