from typing import Any, Mapping, Optional

import numpy as np

from ..config import get_id_selection, get_soft_bound
from ..functional import ConstantFunctional
from ..integral_alg import SpatialIntegralAlg
from ..parameter import Parameter, ShapeParameter
from ..state import SimulationState
from ..typing import TensorLike
from .base import Objective, zero_adjoint_rhs


class VolumeObjective(Objective):
    """Measure of the cells whose body id is in 'volume_selection'."""
    def __init__(self, shape_param: Optional[ShapeParameter], args: Mapping[str, Any]):
        if shape_param is None:
            raise ValueError("Volume Objective needs non-empty shape parameter!")
        self.shape_param = shape_param
        self.interested_ids = get_id_selection(args, "volume_selection")
        self.alg = SpatialIntegralAlg(shape_param.get_state(), q=1)

    def value(self) -> float:
        return self.alg.integrate(ConstantFunctional(), None, self.interested_ids, 'volume')

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        return zero_adjoint_rhs(state)

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        term = np.zeros(param.full_dim, dtype=np.float64)
        if param.same_as(self.shape_param):
            term += self.alg.dj_dx(ConstantFunctional(), None, self.interested_ids, 'volume')
        return term


class VolumePenaltyObjective(Objective):
    """
    One-sided quadratic penalty keeping the volume inside 'soft_bound'.

    The value is 0 for ``lo <= vol <= hi``, ``(vol - lo)^2`` below and
    ``(vol - hi)^2`` above the bound.
    """
    def __init__(self, shape_param: Optional[ShapeParameter], args: Mapping[str, Any]):
        self.obj = VolumeObjective(shape_param, args)
        self.bound = np.array(get_soft_bound(args))

    def value(self) -> float:
        vol = self.obj.value()
        lo, hi = self.bound
        if vol < lo:
            return (vol - lo)**2
        elif vol > hi:
            return (vol - hi)**2
        return 0.0

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        return zero_adjoint_rhs(state)

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        vol = self.obj.value()
        lo, hi = self.bound
        if vol < lo:
            coef = 2*(vol - lo)
        elif vol > hi:
            coef = 2*(vol - hi)
        else:
            return np.zeros(param.full_dim, dtype=np.float64)
        return coef*self.obj.compute_partial_gradient(param)
