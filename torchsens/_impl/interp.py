import torch


def _interp_fit(y0, y1, y_mid, f0, f1, dt):
    """Fit coefficients for 4th order polynomial interpolation.

    Args:
        y0: function value at the start of the interval.
        y1: function value at the end of the interval.
        y_mid: function value at the mid-point of the interval.
        f0: derivative value at the start of the interval.
        f1: derivative value at the end of the interval.
        dt: width of the interval.

    Returns:
        List of coefficients `[a, b, c, d, e]` for interpolating with the polynomial
        `p = a * x ** 4 + b * x ** 3 + c * x ** 2 + d * x + e` for values of `x`
        between 0 (start of interval) and 1 (end of interval).
    """
    a = -2 * dt * f0 + 2 * dt * f1 - 8 * y0 - 8 * y1 + 16 * y_mid
    b = 5 * dt * f0 - 3 * dt * f1 + 18 * y0 + 14 * y1 - 32 * y_mid
    c = -4 * dt * f0 + dt * f1 - 11 * y0 - 5 * y1 + 16 * y_mid
    d = dt * f0
    e = y0
    return [a, b, c, d, e]


def _hermite_fit(y0, y1, f0, f1, dt):
    """Coefficients of the cubic Hermite interpolant, in the same layout as `_interp_fit`."""
    a = 2 * y0 + dt * f0 - 2 * y1 + dt * f1
    b = -3 * y0 - 2 * dt * f0 + 3 * y1 - dt * f1
    c = dt * f0
    d = y0
    return [a, b, c, d]


def _interp_evaluate(coefficients, t0, t1, t):
    """Evaluate polynomial interpolation at the given time point.

    Args:
        coefficients: list of Tensor coefficients as created by `_interp_fit` or `_hermite_fit`,
            highest order first.
        t0: scalar giving the start of the interval.
        t1: scalar giving the end of the interval.
        t: scalar giving the desired interpolation point.

    Returns:
        Polynomial interpolation of the coefficients at time `t`.
    """
    t0 = float(t0)
    t1 = float(t1)
    t = float(t)
    # Allow for rounding in the times handed to us by a solver working on negated time.
    slack = 1e-12 * max(abs(t0), abs(t1), 1.)
    assert t0 - slack <= t <= t1 + slack, 'invalid interpolation, fails `t0 <= t <= t1`: {}, {}, {}'.format(t0, t, t1)
    x = min(max((t - t0) / (t1 - t0), 0.), 1.)

    # Horner's scheme.
    total = coefficients[0]
    for coefficient in coefficients[1:]:
        total = total * x + coefficient
    return total
