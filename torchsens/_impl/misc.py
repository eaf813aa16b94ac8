import warnings
import torch
from .errors import ConfigurationError


def _handle_unused_kwargs(solver, unused_kwargs):
    if len(unused_kwargs) > 0:
        warnings.warn('{}: Unexpected arguments {}'.format(solver.__class__.__name__, unused_kwargs))


def _rms_norm(tensor):
    return tensor.pow(2).mean().sqrt()


def _select_initial_step(func, t0, y0, order, rtol, atol, norm, f0=None, t1=None):
    """Empirically select a good initial step.

    The algorithm is described in [1]_.

    References
    ----------
    .. [1] E. Hairer, S. P. Norsett G. Wanner, "Solving Ordinary Differential
           Equations I: Nonstiff Problems", Sec. II.4, 2nd edition.
    """

    dtype = y0.dtype
    device = y0.device

    # Step size selection is never differentiated, in either AD mode.
    y0 = y0.detach()
    if f0 is None:
        f0 = func(t0, y0)
    f0 = f0.detach()

    scale = atol + torch.abs(y0) * rtol

    d0 = norm(y0 / scale)
    d1 = norm(f0 / scale)

    if d0 < 1e-5 or d1 < 1e-5:
        h0 = torch.tensor(1e-6, dtype=dtype, device=device)
    else:
        h0 = 0.01 * d0 / d1
    if t1 is not None:
        # Never evaluate func beyond the end of the integration interval.
        h0 = torch.min(torch.as_tensor(h0, dtype=dtype, device=device), t1 - t0)

    y1 = y0 + h0 * f0
    f1 = func(t0 + h0, y1).detach()

    d2 = norm((f1 - f0) / scale) / h0

    if d1 <= 1e-15 and d2 <= 1e-15:
        h1 = torch.max(torch.tensor(1e-6, dtype=dtype, device=device), h0 * 1e-3)
    else:
        h1 = (0.01 / max(d1, d2)) ** (1. / float(order + 1))

    h = torch.min(100 * h0, h1)
    if t1 is not None:
        h = torch.min(h, t1 - t0)
    return h.detach()


def _compute_error_ratio(error_estimate, rtol, atol, y0, y1, norm):
    error_tol = atol + rtol * torch.max(y0.detach().abs(), y1.detach().abs())
    return norm(error_estimate.detach() / error_tol)


@torch.no_grad()
def _optimal_step_size(last_step, error_ratio, safety, ifactor, dfactor, order):
    """Calculate the optimal size for the next step."""
    if error_ratio == 0:
        return last_step * ifactor
    if error_ratio < 1:
        dfactor = torch.ones((), dtype=last_step.dtype, device=last_step.device)
    error_ratio = error_ratio.type_as(last_step)
    exponent = torch.tensor(order, dtype=last_step.dtype, device=last_step.device).reciprocal()
    factor = torch.min(ifactor, torch.max(safety / error_ratio ** exponent, dfactor))
    return last_step * factor


def _assert_floating(name, t):
    if not torch.is_floating_point(t):
        raise TypeError('`{}` must be a floating point Tensor but is a {}'.format(name, t.type()))


def _check_timelike(name, timelike):
    assert isinstance(timelike, torch.Tensor), '{} must be a torch.Tensor'.format(name)
    _assert_floating(name, timelike)
    assert timelike.ndimension() == 1, "{} must be one dimensional".format(name)
    diff = timelike[1:] > timelike[:-1]
    if not (diff.all() or (~diff).all()):
        raise ConfigurationError('{} must be strictly increasing or decreasing'.format(name))


def _as_tolerance(name, tol, y0):
    """Scalar tolerances stay floats; per-component tolerances become a Tensor shaped like `y0`."""
    if torch.is_tensor(tol):
        assert not tol.requires_grad, "{} cannot require gradient".format(name)
        if tol.numel() == 1:
            return tol.item()
        if tol.shape != y0.shape:
            raise ConfigurationError('per-component `{}` must have the same shape as the state, got {} and {}'
                                     .format(name, tuple(tol.shape), tuple(y0.shape)))
        return tol.to(device=y0.device, dtype=y0.dtype)
    return float(tol)


class _ReverseFunc(object):
    def __init__(self, base_func, mul=1.0):
        self.base_func = base_func
        self.mul = mul

    def __call__(self, t, y):
        return self.mul * self.base_func(-t, y)


def _check_inputs(func, y0, t, rtol, atol, method, options, SOLVERS):

    assert isinstance(y0, torch.Tensor), 'y0 must be a torch.Tensor'
    _assert_floating('y0', y0)

    # Normalise method and options
    if options is None:
        options = {}
    else:
        options = options.copy()
    if method is None:
        method = 'dopri5'
    if method not in SOLVERS:
        raise ConfigurationError('Invalid method "{}". Must be one of {}'.format(method,
                                                                                 '{"' + '", "'.join(SOLVERS.keys()) + '"}.'))

    rtol = _as_tolerance('rtol', rtol, y0)
    atol = _as_tolerance('atol', atol, y0)

    # Normalise time
    if not torch.is_tensor(t):
        t = torch.tensor(t, dtype=y0.dtype, device=y0.device)
    _check_timelike('t', t)
    t = t.detach().to(device=y0.device, dtype=y0.dtype)
    t_is_reversed = False
    if len(t) > 1 and t[0] > t[1]:
        t_is_reversed = True

    if t_is_reversed:
        # Change the integration times to ascending order.
        # We do this by negating the time values and all associated arguments.
        t = -t

        # Ensure time values are un-negated when calling functions.
        func = _ReverseFunc(func, mul=-1.0)

        # For fixed step solvers.
        try:
            _grid_constructor = options['grid_constructor']
        except KeyError:
            pass
        else:
            options['grid_constructor'] = lambda func, y0, t: -_grid_constructor(func, y0, -t)

    return func, y0, t, rtol, atol, method, options, t_is_reversed
