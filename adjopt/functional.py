"""
Integrable functionals.

An `IntegrableFunctional` is a pointwise integrand. It is evaluated on a
`QuadratureBatch` holding the quadrature points of a set of entities and
returns one contribution per point. Each functional declares which derivative
slots it provides; the assembler treats an absent slot as a zero contribution.

Evaluators must not mutate shared state: a batch is private to one call, so
batches of disjoint element chunks can be evaluated concurrently and summed.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Tuple

import numpy as np

from .typing import TensorLike


class Slot(Enum):
    VALUE = 'j'
    DJ_DU = 'dj_du'
    DJ_DGRADU = 'dj_dgradu'
    DJ_DX = 'dj_dx'
    DJ_DLAME = 'dj_dlame'


@dataclass
class QuadratureBatch:
    """
    Quadrature data of NE entities with NQ points each.

    Attributes:
        local_pts (TensorLike): Barycentric coordinates in the owning cell, (NE, NQ, TD+1).
        pts (TensorLike): Physical points, (NE, NQ, GD).
        u (TensorLike): Field values, (NE, NQ, VD).
        grad_u (TensorLike): Field gradients, (NE, NQ, VD, GD).
        lam (TensorLike): Lamé lambda, (NE, NQ).
        mu (TensorLike): Lamé mu, (NE, NQ).
        elements (TensorLike): Owning cell of every entity, (NE, ).
        normals (TensorLike | None): Outward normals for surface batches, (NE, NQ, GD).
        params (dict): Extra parameters, e.g. the time step under 'step'.
    """
    local_pts: TensorLike
    pts: TensorLike
    u: TensorLike
    grad_u: TensorLike
    lam: TensorLike
    mu: TensorLike
    elements: TensorLike
    normals: Any = None
    params: Dict[str, Any] = field(default_factory=dict)


class IntegrableFunctional():
    """Base class of pointwise integrands.

    Subclasses list the slots they implement in `slots` and override the
    matching methods. The value slot is mandatory.
    """
    slots: FrozenSet[Slot] = frozenset({Slot.VALUE})

    def has(self, slot: Slot) -> bool:
        return slot in self.slots

    def j(self, batch: QuadratureBatch) -> TensorLike:
        """Values, shape (NE, NQ)."""
        raise NotImplementedError

    def dj_du(self, batch: QuadratureBatch) -> TensorLike:
        """Derivative w.r.t. the field value, shape (NE, NQ, VD)."""
        raise NotImplementedError

    def dj_dgradu(self, batch: QuadratureBatch) -> TensorLike:
        """Derivative w.r.t. the field gradient, shape (NE, NQ, VD, GD)."""
        raise NotImplementedError

    def dj_dx(self, batch: QuadratureBatch) -> TensorLike:
        """Derivative w.r.t. the physical position, shape (NE, NQ, GD)."""
        raise NotImplementedError

    def dj_dlame(self, batch: QuadratureBatch) -> Tuple[TensorLike, TensorLike]:
        """Derivatives w.r.t. lambda and mu, each of shape (NE, NQ)."""
        raise NotImplementedError


class ConstantFunctional(IntegrableFunctional):
    """The constant integrand; integrates to the measure of the selection."""
    slots = frozenset({Slot.VALUE})

    def __init__(self, c: float = 1.0):
        self.c = c

    def j(self, batch):
        return np.full(batch.pts.shape[:2], self.c, dtype=np.float64)
