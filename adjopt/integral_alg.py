from typing import Optional, Set, Tuple
from multiprocessing.pool import ThreadPool as Pool

import numpy as np

from .functional import IntegrableFunctional, QuadratureBatch, Slot
from .state import SimulationState
from .typing import TensorLike


class SpatialIntegralAlg():
    """
    Quadrature assembly of integrable functionals on a simulation state.

    The integral ``J = sum_e sum_q w_q |e| j(q)`` runs over cells selected by
    body id ('volume') or boundary faces selected by boundary id ('surface');
    an empty id set selects everything. Besides the value, the class assembles
    the derivatives of ``J`` with respect to the field dofs, the node
    positions (holding the field dofs fixed) and the cell Lamé parameters.

    Parameters:
        state (SimulationState): The simulation providing mesh and material.
        q (int): Quadrature order.
        nthreads (int | None): When larger than one, entities are split into
            chunks evaluated on a thread pool and the partial results summed.
    """
    def __init__(self, state: SimulationState, q: int = 2, nthreads: Optional[int] = None):
        self.state = state
        self.q = q
        self.nthreads = nthreads

    def entities(self, ids: Set[int], integral_type: str = 'volume') -> TensorLike:
        mesh = self.state.mesh
        if integral_type == 'volume':
            tags = mesh.body_id
        elif integral_type == 'surface':
            tags = mesh.boundary_id
        else:
            raise ValueError(f"Unknown spatial integral type '{integral_type}'.")
        if len(ids) == 0:
            return np.arange(len(tags))
        return np.nonzero(np.isin(tags, list(ids)))[0]

    def batch(self, index: TensorLike, u: Optional[TensorLike], integral_type: str = 'volume',
              step: int = 0, with_density: bool = True) -> Tuple[QuadratureBatch, TensorLike, TensorLike, TensorLike]:
        """
        Build the quadrature batch of the given entities.

        Returns:
            tuple: the batch, the quadrature weights (NQ, ), the entity
            measures (NE, ) and the barycentric gradients of the owning cells
            (NE, TD+1, GD).
        """
        state = self.state
        mesh = state.mesh
        VD = state.value_dimension()
        GD = mesh.geo_dimension()

        if integral_type == 'volume':
            cells = index
            qf = mesh.integrator(self.q, 'cell')
            bcs, ws = qf.get_quadrature_points_and_weights()
            local_pts = np.broadcast_to(bcs, (len(cells), ) + bcs.shape)
            measure = mesh.entity_measure('cell', cells)
            normals = None
        else:
            cells = mesh.bdface2cell[index]
            qf = mesh.integrator(self.q, 'face')
            bcs, ws = qf.get_quadrature_points_and_weights()
            local_pts = mesh.face_to_cell_bcs(bcs, index)
            measure = mesh.entity_measure('face', index)
            n = mesh.face_unit_normal(index)
            normals = np.broadcast_to(n[:, None, :], (len(index), len(ws), GD))

        NQ = len(ws)
        cell = mesh.entity('cell', cells)
        if u is None:
            U = np.zeros((mesh.number_of_nodes(), VD), dtype=np.float64)
        else:
            U = np.asarray(u).reshape(-1, VD)

        gl = mesh.grad_lambda(cells)
        pts = np.einsum('eqj, ejd->eqd', local_pts, mesh.node[cell])
        uq = np.einsum('eqj, ejk->eqk', local_pts, U[cell])
        grad = np.einsum('ejk, ejd->ekd', U[cell], gl)
        grad = np.broadcast_to(grad[:, None], (len(cells), NQ, VD, GD))
        lam, mu = state.lame.lambda_mu(cells, with_density=with_density)
        lam = np.broadcast_to(lam[:, None], (len(cells), NQ))
        mu = np.broadcast_to(mu[:, None], (len(cells), NQ))

        batch = QuadratureBatch(local_pts=local_pts, pts=pts, u=uq, grad_u=grad,
                lam=lam, mu=mu, elements=cells, normals=normals, params={'step': step})
        return batch, ws, measure, gl

    def _map(self, fun, index):
        n = self.nthreads
        if n is None or n <= 1 or len(index) < 2*n:
            return fun(index)
        chunks = np.array_split(index, n)
        with Pool(n) as pool:
            results = pool.map(fun, chunks)
        return sum(results[1:], results[0])

    def integrate(self, j: IntegrableFunctional, u: Optional[TensorLike], ids: Set[int],
                  integral_type: str = 'volume', step: int = 0) -> float:
        def fun(index):
            batch, ws, m, _ = self.batch(index, u, integral_type, step)
            return np.einsum('q, e, eq->', ws, m, j.j(batch))
        return float(self._map(fun, self.entities(ids, integral_type)))

    def entity_integral(self, j: IntegrableFunctional, u: Optional[TensorLike], ids: Set[int],
                        integral_type: str = 'volume', step: int = 0, with_density: bool = True) -> TensorLike:
        """Integrals accumulated on the owning cell of every entity, shape (NC, )."""
        NC = self.state.mesh.number_of_cells()
        def fun(index):
            batch, ws, m, _ = self.batch(index, u, integral_type, step, with_density)
            val = np.zeros(NC, dtype=np.float64)
            np.add.at(val, batch.elements, np.einsum('q, e, eq->e', ws, m, j.j(batch)))
            return val
        return self._map(fun, self.entities(ids, integral_type))

    def dj_du(self, j: IntegrableFunctional, u: Optional[TensorLike], ids: Set[int],
              integral_type: str = 'volume', step: int = 0) -> TensorLike:
        """Derivative of the integral w.r.t. the field dofs, shape (ndof, )."""
        state = self.state
        NN = state.mesh.number_of_nodes()
        VD = state.value_dimension()
        if not (j.has(Slot.DJ_DU) or j.has(Slot.DJ_DGRADU)):
            return np.zeros(NN*VD, dtype=np.float64)

        def fun(index):
            batch, ws, m, gl = self.batch(index, u, integral_type, step)
            val = np.zeros((len(index), gl.shape[1], VD), dtype=np.float64)
            if j.has(Slot.DJ_DU):
                val += np.einsum('q, e, eqj, eqk->ejk', ws, m, batch.local_pts, j.dj_du(batch))
            if j.has(Slot.DJ_DGRADU):
                val += np.einsum('q, e, eqkd, ejd->ejk', ws, m, j.dj_dgradu(batch), gl)
            F = np.zeros((NN, VD), dtype=np.float64)
            np.add.at(F, state.mesh.entity('cell', batch.elements), val)
            return F
        return self._map(fun, self.entities(ids, integral_type)).reshape(-1)

    def dj_dx(self, j: IntegrableFunctional, u: Optional[TensorLike], ids: Set[int],
              integral_type: str = 'volume', step: int = 0) -> TensorLike:
        """
        Shape derivative: derivative of the integral w.r.t. the node
        coordinates with the field dofs held fixed, shape (NN*GD, ).

        Three terms contribute: the change of the entity measure, the motion
        of the quadrature points (when `j` depends on the position) and the
        change of the field gradient ``d(grad u)[V] = -grad u grad V``.
        """
        mesh = self.state.mesh
        NN = mesh.number_of_nodes()
        GD = mesh.geo_dimension()

        def fun(index):
            batch, ws, m, gl = self.batch(index, u, integral_type, step)
            val = j.j(batch)
            D = np.zeros((NN, GD), dtype=np.float64)

            etype = 'cell' if integral_type == 'volume' else 'face'
            dm = mesh.measure_gradient(etype, index)
            np.add.at(D, mesh.entity(etype, index), np.einsum('q, eq, ejd->ejd', ws, val, dm))

            cval = np.zeros((len(index), gl.shape[1], GD), dtype=np.float64)
            if j.has(Slot.DJ_DX):
                cval += np.einsum('q, e, eqj, eqd->ejd', ws, m, batch.local_pts, j.dj_dx(batch))
            if j.has(Slot.DJ_DGRADU):
                cval -= np.einsum('q, e, eqij, eqik, eaj->eak', ws, m, j.dj_dgradu(batch), batch.grad_u, gl)
            np.add.at(D, mesh.entity('cell', batch.elements), cval)
            return D
        return self._map(fun, self.entities(ids, integral_type)).reshape(-1)

    def dj_dlame(self, j: IntegrableFunctional, u: Optional[TensorLike], ids: Set[int],
                 integral_type: str = 'volume', step: int = 0) -> Tuple[TensorLike, TensorLike]:
        """Derivatives w.r.t. the effective cell Lamé parameters, each (NC, )."""
        NC = self.state.mesh.number_of_cells()
        if not j.has(Slot.DJ_DLAME):
            return np.zeros(NC), np.zeros(NC)

        def fun(index):
            batch, ws, m, _ = self.batch(index, u, integral_type, step)
            dl, dmu = j.dj_dlame(batch)
            val = np.zeros((2, NC), dtype=np.float64)
            np.add.at(val[0], batch.elements, np.einsum('q, e, eq->e', ws, m, dl))
            np.add.at(val[1], batch.elements, np.einsum('q, e, eq->e', ws, m, dmu))
            return val
        val = self._map(fun, self.entities(ids, integral_type))
        return val[0], val[1]
