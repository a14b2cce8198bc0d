import numpy as np


class Quadrature():
    """Quadrature rule on a reference simplex.

    Points are stored in barycentric coordinates, shape (NQ, TD+1), and the
    weights sum to one, so an integral over an entity is
    ``measure * sum(weights * f(points))``.
    """
    def number_of_quadrature_points(self):
        return self.quadpts.shape[0]

    def get_quadrature_points_and_weights(self):
        return self.quadpts, self.weights

    def get_quadrature_point_and_weight(self, i):
        return self.quadpts[i, :], self.weights[i]


class GaussLegendreQuadrature(Quadrature):
    def __init__(self, k):
        x, w = np.polynomial.legendre.leggauss(k)
        t = (x + 1)/2
        self.quadpts = np.column_stack((1 - t, t))
        self.weights = w/2


class TriangleQuadrature(Quadrature):
    def __init__(self, k):
        if k == 1:
            A = np.array([[1/3, 1/3, 1/3, 1.0]], dtype=np.float64)
        elif k == 2:
            A = np.array([
                [2/3, 1/6, 1/6, 1/3],
                [1/6, 2/3, 1/6, 1/3],
                [1/6, 1/6, 2/3, 1/3]], dtype=np.float64)
        elif k == 3:
            A = np.array([
                [1/3, 1/3, 1/3, -27/48],
                [0.6, 0.2, 0.2, 25/48],
                [0.2, 0.6, 0.2, 25/48],
                [0.2, 0.2, 0.6, 25/48]], dtype=np.float64)
        elif k == 4:
            a, b = 0.445948490915965, 0.091576213509771
            wa, wb = 0.223381589678011, 0.109951743655322
            A = np.array([
                [1 - 2*a, a, a, wa],
                [a, 1 - 2*a, a, wa],
                [a, a, 1 - 2*a, wa],
                [1 - 2*b, b, b, wb],
                [b, 1 - 2*b, b, wb],
                [b, b, 1 - 2*b, wb]], dtype=np.float64)
        else:
            raise ValueError(f"TriangleQuadrature does not support order {k}.")
        self.quadpts = A[:, 0:3]
        self.weights = A[:, 3]


class TetrahedronQuadrature(Quadrature):
    def __init__(self, k):
        if k == 1:
            A = np.array([[0.25, 0.25, 0.25, 0.25, 1.0]], dtype=np.float64)
        elif k == 2:
            a, b = 0.5854101966249685, 0.1381966011250105
            A = np.array([
                [a, b, b, b, 0.25],
                [b, a, b, b, 0.25],
                [b, b, a, b, 0.25],
                [b, b, b, a, 0.25]], dtype=np.float64)
        elif k == 3:
            A = np.array([
                [0.25, 0.25, 0.25, 0.25, -0.8],
                [0.5, 1/6, 1/6, 1/6, 0.45],
                [1/6, 0.5, 1/6, 1/6, 0.45],
                [1/6, 1/6, 0.5, 1/6, 0.45],
                [1/6, 1/6, 1/6, 0.5, 0.45]], dtype=np.float64)
        else:
            raise ValueError(f"TetrahedronQuadrature does not support order {k}.")
        self.quadpts = A[:, 0:4]
        self.weights = A[:, 4]


def simplex_quadrature(TD: int, q: int) -> Quadrature:
    """Quadrature of order `q` on the reference simplex of dimension `TD`."""
    if TD == 1:
        return GaussLegendreQuadrature(q)
    elif TD == 2:
        return TriangleQuadrature(q)
    elif TD == 3:
        return TetrahedronQuadrature(q)
    raise ValueError(f"No quadrature for simplices of dimension {TD}.")
