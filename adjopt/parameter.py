"""
Design parameters.

Objectives route a gradient request to the right sensitivity by comparing
parameter identities by value: every parameter carries a `ParameterType` tag
and a small integer `pid` assigned at construction.
"""
import itertools
from enum import IntEnum
from typing import Iterable, Optional

import numpy as np

from .state import SimulationState
from .typing import TensorLike


class ParameterType(IntEnum):
    SHAPE = 0
    ELASTIC = 1
    TOPOLOGY = 2


_pid_counter = itertools.count()


class Parameter():
    kind: ParameterType

    def __init__(self, states: Iterable[SimulationState], name: Optional[str] = None):
        self.states = list(states)
        self.pid = next(_pid_counter)
        self.name = name if name is not None else f"{self.kind.name.lower()}_{self.pid}"

    @property
    def full_dim(self) -> int:
        raise NotImplementedError

    def contains_state(self, state: SimulationState) -> bool:
        return any(s is state for s in self.states)

    def same_as(self, other: Optional['Parameter']) -> bool:
        return other is not None and self.kind == other.kind and self.pid == other.pid

    def get_state(self) -> SimulationState:
        return self.states[0]

    def __repr__(self):
        return f"{type(self).__name__}(name={self.name!r}, full_dim={self.full_dim})"


class ShapeParameter(Parameter):
    """
    Vertex positions of the mesh of one state, flattened node-major.

    Parameters:
        state (SimulationState): The controlled simulation.
        active_mask (TensorLike | None): Vertices that may move, defaults to all.
    """
    kind = ParameterType.SHAPE

    def __init__(self, state: SimulationState, active_mask: Optional[TensorLike] = None, name: Optional[str] = None):
        super().__init__([state], name)
        NN = state.mesh.number_of_nodes()
        if active_mask is None:
            active_mask = np.ones(NN, dtype=np.bool_)
        self.active_mask = np.asarray(active_mask, dtype=np.bool_)

    @property
    def full_dim(self) -> int:
        mesh = self.get_state().mesh
        return mesh.number_of_nodes()*mesh.geo_dimension()

    def get_full_mesh(self):
        mesh = self.get_state().mesh
        return mesh.node, mesh.cell

    def get_boundary_edges(self) -> TensorLike:
        return self.get_state().mesh.boundary_edge()

    def get_boundary_nodes(self) -> TensorLike:
        return np.nonzero(self.get_state().mesh.boundary_node_flag())[0]

    def get_active_vertex_mask(self) -> TensorLike:
        return self.active_mask

    def set_value(self, x: TensorLike):
        mesh = self.get_state().mesh
        mesh.node[:] = np.asarray(x).reshape(mesh.node.shape)


class ElasticParameter(Parameter):
    """Per-cell Lamé parameters laid out as ``[lambda_0.., mu_0..]``."""
    kind = ParameterType.ELASTIC

    def __init__(self, state: SimulationState, name: Optional[str] = None):
        super().__init__([state], name)

    @property
    def full_dim(self) -> int:
        return 2*self.get_state().mesh.number_of_cells()

    def set_value(self, x: TensorLike):
        lame = self.get_state().lame
        NC = len(lame.lam)
        lame.lam[:] = x[:NC]
        lame.mu[:] = x[NC:]


class TopologyOptimizationParameter(Parameter):
    """Per-cell material density of a SIMP interpolation."""
    kind = ParameterType.TOPOLOGY

    def __init__(self, state: SimulationState, name: Optional[str] = None):
        super().__init__([state], name)
        lame = state.lame
        if lame.density is None:
            lame.density = np.ones(state.mesh.number_of_cells(), dtype=np.float64)

    @property
    def full_dim(self) -> int:
        return self.get_state().mesh.number_of_cells()

    def set_value(self, x: TensorLike):
        self.get_state().lame.density[:] = x
