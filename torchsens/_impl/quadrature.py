import functools
import numpy as np
import torch
from .errors import NumericalDivergenceError


@functools.lru_cache(maxsize=None)
def _gauss_legendre(order):
    nodes, weights = np.polynomial.legendre.leggauss(order)
    # Map from [-1, 1] to [0, 1].
    return tuple(float(x) for x in 0.5 * (nodes + 1.)), tuple(float(w) for w in 0.5 * weights)


def gauss_legendre(integrand, a, b, order=7):
    """Fixed-order Gauss-Legendre approximation to the integral of `integrand` over `[a, b]`."""
    nodes, weights = _gauss_legendre(order)
    width = b - a
    total = None
    for node, weight in zip(nodes, weights):
        term = (weight * width) * integrand(a + node * width)
        total = term if total is None else total + term
    return total


def adaptive_gauss_legendre(integrand, a, b, atol, rtol, order=7, max_depth=20):
    """Integrate over `[a, b]`, bisecting until the one-panel and two-panel estimates agree.

    The integrand may be Tensor valued; the tolerance applies component-wise.
    """
    def recurse(a, b, whole, depth):
        mid = 0.5 * (a + b)
        left = gauss_legendre(integrand, a, mid, order)
        right = gauss_legendre(integrand, mid, b, order)
        refined = left + right
        error = (refined - whole).abs()
        if bool((error <= atol + rtol * refined.abs()).all()):
            return refined
        if depth >= max_depth:
            raise NumericalDivergenceError('quadrature did not converge', bracket=(a, b), component='quadrature',
                                           tolerance=(atol, rtol))
        return recurse(a, mid, left, depth + 1) + recurse(mid, b, right, depth + 1)

    if a == b:
        return torch.zeros_like(integrand(a))
    return recurse(a, b, gauss_legendre(integrand, a, b, order), 0)
