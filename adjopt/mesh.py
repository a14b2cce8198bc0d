import math
from typing import Optional, Callable

import numpy as np

from .quadrature import simplex_quadrature
from .typing import TensorLike, Index, _S


class SimplexMesh():
    """
    Linear simplex mesh (triangles in 2d, tetrahedra in 3d).

    Cells carry a body id, boundary faces carry a boundary id. Boundary faces
    are stored as cell-local vertex subsets, so a point given in face
    barycentric coordinates can be lifted to the barycentric coordinates of
    the cell that owns the face.

    Parameters:
        node (TensorLike): Node coordinates, shape (NN, GD).
        cell (TensorLike): Cell to node connectivity, shape (NC, TD+1).
        body_id (TensorLike | None): Body id of each cell, defaults to 0.
    """
    def __init__(self, node: TensorLike, cell: TensorLike, body_id: Optional[TensorLike] = None):
        self.node = np.asarray(node, dtype=np.float64)
        self.cell = np.asarray(cell, dtype=np.int_)
        self.itype = self.cell.dtype
        self.ftype = self.node.dtype

        NC = self.cell.shape[0]
        if body_id is None:
            body_id = np.zeros(NC, dtype=np.int_)
        self.body_id = np.asarray(body_id, dtype=np.int_)
        if self.body_id.shape != (NC, ):
            raise ValueError(f"body_id must have shape ({NC},), got {self.body_id.shape}.")

        NVC = self.cell.shape[1]
        self.localFace = np.array([[j for j in range(NVC) if j != i] for i in range(NVC)])
        self.construct()

    def construct(self):
        NC = self.number_of_cells()
        NVC = self.cell.shape[1]

        totalFace = self.cell[:, self.localFace].reshape(-1, NVC - 1)
        _, i0, j, counts = np.unique(np.sort(totalFace, axis=1), axis=0,
                return_index=True, return_inverse=True, return_counts=True)
        j = j.reshape(-1)
        isBdFace = counts[j] == 1

        idx, = np.nonzero(isBdFace)
        self.bdface2cell = idx // NVC
        self.bdface_local = idx % NVC
        self.bdface = totalFace[idx]
        self.boundary_id = np.zeros(len(idx), dtype=np.int_)

    @classmethod
    def from_box(cls, box=[0, 1, 0, 1], nx=10, ny=10, body_id: Optional[Callable] = None):
        """Structured triangle mesh of a rectangle.

        `body_id`, if given, maps cell barycenters (NC, 2) to integer ids.
        """
        X, Y = np.mgrid[box[0]:box[1]:complex(0, nx + 1), box[2]:box[3]:complex(0, ny + 1)]
        node = np.column_stack((X.ravel(), Y.ravel()))

        idx = np.arange((nx + 1)*(ny + 1)).reshape(nx + 1, ny + 1)
        c0 = idx[:-1, :-1].ravel()
        c1 = idx[1:, :-1].ravel()
        c2 = idx[1:, 1:].ravel()
        c3 = idx[:-1, 1:].ravel()
        cell = np.r_[np.column_stack((c1, c2, c0)), np.column_stack((c3, c0, c2))]

        mesh = cls(node, cell)
        if body_id is not None:
            mesh.body_id = np.asarray(body_id(mesh.entity_barycenter('cell')), dtype=np.int_)
        return mesh

    def number_of_nodes(self):
        return self.node.shape[0]

    def number_of_cells(self):
        return self.cell.shape[0]

    def number_of_boundary_faces(self):
        return self.bdface.shape[0]

    def geo_dimension(self):
        return self.node.shape[1]

    def top_dimension(self):
        return self.cell.shape[1] - 1

    def entity(self, etype='cell', index: Index = _S):
        if etype in {'cell'}:
            return self.cell[index]
        elif etype in {'face'}:
            return self.bdface[index]
        elif etype in {'node'}:
            return self.node[index]
        raise ValueError(f"Invalid entity type '{etype}'.")

    def entity_barycenter(self, etype='cell', index: Index = _S):
        entity = self.entity(etype, index)
        if etype == 'node':
            return entity
        return self.node[entity].mean(axis=1)

    def entity_measure(self, etype='cell', index: Index = _S):
        """Measure of cells, or of boundary faces when `etype == 'face'`."""
        entity = self.entity(etype, index)
        k = entity.shape[1] - 1
        if k == 0:
            return np.ones(len(entity), dtype=self.ftype)
        J = self.node[entity[:, 1:]] - self.node[entity[:, [0]]] # (NE, k, GD)
        G = np.einsum('eid, ejd->eij', J, J)
        return np.sqrt(np.abs(np.linalg.det(G)))/math.factorial(k)

    def measure_gradient(self, etype='cell', index: Index = _S):
        """
        Derivative of every entity measure with respect to the coordinates of
        its vertices, shape (NE, k+1, GD).
        """
        entity = self.entity(etype, index)
        k = entity.shape[1] - 1
        m = self.entity_measure(etype, index)
        J = self.node[entity[:, 1:]] - self.node[entity[:, [0]]] # (NE, k, GD)
        G = np.einsum('eid, ejd->eij', J, J)
        dm = m[:, None, None]*np.einsum('eij, ejd->eid', np.linalg.inv(G), J)
        return np.concatenate((-dm.sum(axis=1, keepdims=True), dm), axis=1)

    def grad_lambda(self, index: Index = _S):
        """Gradients of the barycentric coordinates, shape (NC, TD+1, GD)."""
        cell = self.cell[index]
        J = self.node[cell[:, 1:]] - self.node[cell[:, [0]]] # (NC, TD, GD)
        G = np.einsum('cid, cjd->cij', J, J)
        Dlambda = np.einsum('cij, cjd->cid', np.linalg.inv(G), J)
        return np.concatenate((-Dlambda.sum(axis=1, keepdims=True), Dlambda), axis=1)

    def bc_to_point(self, bcs: TensorLike, etype='cell', index: Index = _S):
        """Map barycentric points (NQ, NV) or per-entity points (NE, NQ, NV)."""
        entity = self.entity(etype, index)
        if bcs.ndim == 2:
            return np.einsum('qj, ejd->eqd', bcs, self.node[entity])
        return np.einsum('eqj, ejd->eqd', bcs, self.node[entity])

    def face_to_cell_bcs(self, bcs: TensorLike, index: Index = _S):
        """Lift face barycentric points (NQ, TD) to cell barycentric points (NF, NQ, TD+1)."""
        local = self.bdface_local[index]
        NVC = self.cell.shape[1]
        cbcs = np.zeros((len(local), bcs.shape[0], NVC), dtype=self.ftype)
        for i in range(NVC):
            flag = local == i
            cbcs[np.ix_(flag, np.arange(bcs.shape[0]), self.localFace[i])] = bcs
        return cbcs

    def face_unit_normal(self, index: Index = _S):
        """Outward unit normals of boundary faces."""
        c = self.bdface2cell[index]
        gl = self.grad_lambda(index=c)
        n = -gl[np.arange(len(c)), self.bdface_local[index]]
        return n/np.linalg.norm(n, axis=-1, keepdims=True)

    def integrator(self, q, etype='cell'):
        TD = self.top_dimension()
        if etype in {'cell'}:
            return simplex_quadrature(TD, q)
        elif etype in {'face'}:
            return simplex_quadrature(TD - 1, q)
        raise ValueError(f"Invalid entity type '{etype}'.")

    def boundary_node_flag(self):
        isBdNode = np.zeros(self.number_of_nodes(), dtype=np.bool_)
        isBdNode[self.bdface] = True
        return isBdNode

    def boundary_edge(self):
        """Edges lying on the boundary, shape (NBE, 2)."""
        face = self.bdface
        if face.shape[1] == 2:
            return face
        edge = face[:, [[1, 2], [2, 0], [0, 1]]].reshape(-1, 2)
        return np.unique(np.sort(edge, axis=1), axis=0)

    def set_boundary_id(self, threshold: Callable[[TensorLike], TensorLike], bid: int):
        """Tag boundary faces whose barycenters satisfy `threshold`."""
        flag = threshold(self.entity_barycenter('face'))
        self.boundary_id[flag] = bid

    def copy(self):
        mesh = SimplexMesh(self.node.copy(), self.cell.copy(), self.body_id.copy())
        mesh.boundary_id = self.boundary_id.copy()
        return mesh
