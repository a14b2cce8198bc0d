"""
Pointwise stress laws used by objective integrands.

All functions are vectorized over leading axes: displacement gradients have
shape (..., VD, GD) and Lamé parameters broadcast against the leading axes.
"""
from typing import Tuple

import numpy as np

from .typing import TensorLike


class UnknownFormulationError(ValueError):
    pass


def _check(formulation, supported):
    if formulation not in supported:
        raise UnknownFormulationError(f"Unknown formulation '{formulation}'!")


def _identity_like(grad_u):
    return np.broadcast_to(np.eye(grad_u.shape[-1]), grad_u.shape)


def _trace(A):
    return np.einsum('...ii->...', A)


def _neo_hookean_kinematics(grad_u):
    F = np.eye(grad_u.shape[-1]) + grad_u
    FmT = np.swapaxes(np.linalg.inv(F), -1, -2)
    logJ = np.log(np.linalg.det(F))
    return F, FmT, logJ


def compute_stress(formulation: str, grad_u: TensorLike, lam, mu) -> TensorLike:
    """
    Stress of a displacement gradient.

    - Laplacian: the gradient itself.
    - LinearElasticity: ``2 mu sym(grad u) + lam tr(grad u) I``.
    - NeoHookean: ``mu (F - F^{-T}) + lam ln(det F) F^{-T}`` with ``F = I + grad u``.
    """
    _check(formulation, ('Laplacian', 'LinearElasticity', 'NeoHookean'))
    lam = np.asarray(lam)[..., None, None]
    mu = np.asarray(mu)[..., None, None]
    if formulation == 'Laplacian':
        return grad_u.copy()
    elif formulation == 'LinearElasticity':
        tr = _trace(grad_u)[..., None, None]
        return mu*(grad_u + np.swapaxes(grad_u, -1, -2)) + lam*tr*_identity_like(grad_u)
    else:
        F, FmT, logJ = _neo_hookean_kinematics(grad_u)
        return mu*(F - FmT) + lam*logJ[..., None, None]*FmT


def stress_transpose_product(formulation: str, grad_u: TensorLike, lam, mu, A: TensorLike) -> TensorLike:
    """
    Return ``B`` with ``A : d(stress)[H] = B : H`` for every direction ``H``.
    """
    _check(formulation, ('Laplacian', 'LinearElasticity', 'NeoHookean'))
    lam = np.asarray(lam)[..., None, None]
    mu = np.asarray(mu)[..., None, None]
    if formulation == 'Laplacian':
        return A.copy()
    elif formulation == 'LinearElasticity':
        tr = _trace(A)[..., None, None]
        return mu*(A + np.swapaxes(A, -1, -2)) + lam*tr*_identity_like(A)
    else:
        F, FmT, logJ = _neo_hookean_kinematics(grad_u)
        M = FmT @ np.swapaxes(A, -1, -2) @ FmT
        c = np.einsum('...ij, ...ij->...', FmT, A)[..., None, None]
        return mu*A + (mu - lam*logJ[..., None, None])*M + lam*c*FmT


def stress_lame_derivative(formulation: str, grad_u: TensorLike) -> Tuple[TensorLike, TensorLike]:
    """Derivatives of the stress with respect to ``lam`` and ``mu``."""
    _check(formulation, ('Laplacian', 'LinearElasticity', 'NeoHookean'))
    if formulation == 'Laplacian':
        return np.zeros_like(grad_u), np.zeros_like(grad_u)
    elif formulation == 'LinearElasticity':
        tr = _trace(grad_u)[..., None, None]
        return tr*_identity_like(grad_u), grad_u + np.swapaxes(grad_u, -1, -2)
    else:
        F, FmT, logJ = _neo_hookean_kinematics(grad_u)
        return logJ[..., None, None]*FmT, F - FmT
