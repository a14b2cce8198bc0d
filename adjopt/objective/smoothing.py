from typing import Any, Mapping

import numpy as np
from scipy.sparse import csr_matrix, diags

from .. import logger
from ..config import get_bool, get_power
from ..parameter import Parameter, ShapeParameter
from ..state import SimulationState
from ..typing import TensorLike
from .base import Objective, zero_adjoint_rhs


class BoundarySmoothingObjective(Objective):
    """
    Regularity of the boundary of a shape.

    The boundary graph is built from the boundary edges of the mesh. In the
    default mode the value is ``|L V|^2`` with the graph Laplacian ``L``
    restricted to active boundary vertices. With 'scale_invariant' every
    active boundary vertex ``b`` contributes ``|s_b|^p`` where ``s_b`` is the
    sum of the edge vectors ``V_b - V_n`` over its neighbours divided by the
    sum of their lengths.
    """
    def __init__(self, shape_param: ShapeParameter, args: Mapping[str, Any]):
        self.shape_param = shape_param
        self.scale_invariant = get_bool(args, "scale_invariant", default=False)
        self.power = get_power(args, default=2)
        self.init(shape_param)

    def init(self, shape_param: ShapeParameter):
        V, _ = shape_param.get_full_mesh()
        NN = V.shape[0]
        edge = shape_param.get_boundary_edges()
        self.active_mask = shape_param.get_active_vertex_mask()
        self.boundary_nodes = shape_param.get_boundary_nodes()

        I = np.concatenate((edge[:, 0], edge[:, 1]))
        J = np.concatenate((edge[:, 1], edge[:, 0]))
        adj = csr_matrix((np.ones(len(I), dtype=np.float64), (I, J)), shape=(NN, NN))
        adj.data[:] = 1
        self.adj = adj

        row = np.zeros(NN, dtype=np.float64)
        row[self.boundary_nodes] = 1
        row[~self.active_mask] = 0
        R = diags(row)
        degree = np.asarray(adj.sum(axis=1)).reshape(-1)
        self.L = (R @ (diags(degree) - adj)).tocsr()
        self.L.eliminate_zeros()

    def _vertices(self) -> TensorLike:
        V, _ = self.shape_param.get_full_mesh()
        return V

    def _neighbors(self, b):
        return self.adj.indices[self.adj.indptr[b]:self.adj.indptr[b+1]]

    def _active_boundary_nodes(self):
        return (b for b in self.boundary_nodes if self.active_mask[b])

    def value(self) -> float:
        V = self._vertices()
        if not self.scale_invariant:
            return float(np.sum((self.L @ V)**2))

        val = 0.0
        for b in self._active_boundary_nodes():
            x = V[b] - V[self._neighbors(b)]
            sum_norm = np.sum(np.linalg.norm(x, axis=-1))
            s = np.sum(x, axis=0)/sum_norm
            val += np.linalg.norm(s)**self.power
        return val

    def compute_adjoint_rhs(self, state: SimulationState) -> TensorLike:
        return zero_adjoint_rhs(state)

    def compute_partial_gradient(self, param: Parameter) -> TensorLike:
        if not param.same_as(self.shape_param):
            return np.zeros(param.full_dim, dtype=np.float64)

        V = self._vertices()
        if not self.scale_invariant:
            return (2*(self.L.T @ (self.L @ V))).reshape(-1)

        p = self.power
        grad = np.zeros_like(V, dtype=np.float64)
        for b in self._active_boundary_nodes():
            nbrs = self._neighbors(b)
            x = V[b] - V[nbrs]
            length = np.linalg.norm(x, axis=-1)
            sum_norm = np.sum(length)
            if sum_norm < 1e-12:
                logger.warning(f"Boundary vertex {b} has near-zero neighbour edge lengths, may result in NAN grad!")
            with np.errstate(divide='ignore', invalid='ignore'):
                s = np.sum(x, axis=0)/sum_norm
                norm_s = np.linalg.norm(s)
                if p < 2 and norm_s < 1e-12:
                    logger.warning(f"Boundary vertex {b} is flat and power {p} < 2, may result in NAN grad!")
                sum_normalized = np.sum(x/length[:, None], axis=0)
                s2 = np.dot(s, s)
                coef = p*norm_s**(p - 2)/sum_norm

                grad[b] += (s*len(nbrs) - s2*sum_normalized)*coef
                grad[nbrs] -= (s + s2*(V[nbrs] - V[b])/length[:, None])*coef
        return grad.reshape(-1)
