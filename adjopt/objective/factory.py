from typing import Any, Mapping, Optional

from ..parameter import ShapeParameter, ElasticParameter, TopologyOptimizationParameter
from ..state import SimulationState
from ..typing import TensorLike
from ..config import get_transient_integral_type
from .base import Objective
from .spatial import (StressObjective, ComplianceObjective, PositionObjective,
        TargetObjective)
from .volume import VolumeObjective, VolumePenaltyObjective
from .composite import SumObjective, BarycenterTargetObjective, TransientObjective
from .smoothing import BoundarySmoothingObjective


def create_objective(args: Mapping[str, Any],
                     state: Optional[SimulationState] = None,
                     shape_param: Optional[ShapeParameter] = None,
                     elastic_param: Optional[ElasticParameter] = None,
                     topo_param: Optional[TopologyOptimizationParameter] = None,
                     target: Optional[TensorLike] = None,
                     reference: Optional[SimulationState] = None) -> Objective:
    """
    Build an objective from a JSON-like dictionary.

    The 'type' key selects the objective: 'stress', 'compliance', 'position',
    'target', 'volume', 'volume_constraint', 'center-target', 'boundary_smoothing'
    or 'sum' (with an 'objectives' list). If the state is time dependent and
    the objective is static, the result is wrapped into a `TransientObjective`
    whose rule is read from 'transient_integral_type'.

    Raises:
        KeyError: a required key is missing.
        ValueError: a key is malformed or a required collaborator is absent.
    """
    if "type" not in args:
        raise KeyError("Objective argument 'type' is required.")
    name = args["type"]

    def require_state():
        if state is None:
            raise ValueError(f"Objective '{name}' needs a simulation state.")
        return state

    if name == "sum":
        return SumObjective(create_objective(a, state, shape_param, elastic_param, topo_param,
                target, reference) for a in args.get("objectives", []))
    elif name == "volume":
        return VolumeObjective(shape_param, args)
    elif name == "volume_constraint":
        return VolumePenaltyObjective(shape_param, args)
    elif name == "boundary_smoothing":
        if shape_param is None:
            raise ValueError("Boundary smoothing needs a shape parameter.")
        return BoundarySmoothingObjective(shape_param, args)

    state = require_state()
    if name == "stress":
        obj = StressObjective(state, shape_param, elastic_param, args,
                has_integral_sqrt=args.get("integral_sqrt", False), topo_param=topo_param)
    elif name == "compliance":
        obj = ComplianceObjective(state, shape_param, elastic_param, topo_param, args)
    elif name == "position":
        obj = PositionObjective(state, shape_param, args, dim=args.get("dim", 0))
    elif name == "target":
        obj = TargetObjective(state, shape_param, args)
        if reference is not None:
            obj.set_reference(reference, set(args.get("reference_cached_body_ids", [])))
    elif name == "center-target":
        if target is None:
            raise ValueError("Barycenter target objective needs a target.")
        obj = BarycenterTargetObjective(state, shape_param, args, target)
    else:
        raise ValueError(f"Unknown objective type '{name}'.")

    if state.is_time_dependent():
        rule = get_transient_integral_type(args, state.time_steps)
        return TransientObjective(state.time_steps, state.dt, rule, obj)
    return obj
