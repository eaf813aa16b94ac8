import collections
import inspect
import torch
from .errors import ConfigurationError


def _count_positional(f):
    try:
        signature = inspect.signature(f)
    except (TypeError, ValueError):
        return None
    kinds = (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
    params = signature.parameters.values()
    if any(param.kind is inspect.Parameter.VAR_POSITIONAL for param in params):
        return None
    return sum(1 for param in params if param.kind in kinds)


class ODEFunction(object):
    """The right hand side of `du/dt = f(u, p, t)`, plus optional analytic derivatives.

    Args:
        f: either out-of-place, `f(u, p, t) -> du`, or in-place, `f(du, u, p, t)` writing into `du`.
        jac: optional `jac(u, p, t)` returning the state Jacobian `df/du` with shape `(N, N)`.
        paramjac: optional `paramjac(u, p, t)` returning the parameter Jacobian `df/dp` with shape `(N, M)`.
        inplace: whether `f` is in-place. Inferred from the number of positional arguments of `f` if not given.
    """

    def __init__(self, f, jac=None, paramjac=None, inplace=None):
        if not callable(f):
            raise ConfigurationError('f must be callable, got {}'.format(type(f).__name__))
        if inplace is None:
            inplace = _count_positional(f) == 4
        self.f = f
        self.jac = jac
        self.paramjac = paramjac
        self.inplace = inplace

    def evaluate(self, u, p, t, out=None):
        """Evaluate the derivative at `(u, p, t)`.

        If `out` is given the derivative is written into it and nothing is returned. `out` is only borrowed for the
        duration of the call: it is never retained, so the caller may reuse it straight away. Exceptions (and
        non-finite values) from `f` are passed through as-is; detecting divergence is the caller's job.
        """
        if self.inplace:
            if out is None:
                du = torch.zeros_like(u)
                self.f(du, u, p, t)
                return du
            self.f(out, u, p, t)
            return None
        du = self.f(u, p, t)
        if out is None:
            return du
        out.copy_(du)
        return None

    def __call__(self, u, p, t):
        return self.evaluate(u, p, t)

    @property
    def has_jacobian(self):
        return self.jac is not None and self.paramjac is not None


_ODEProblemBase = collections.namedtuple('_ODEProblemBase', 'f, u0, tspan, p')


class ODEProblem(_ODEProblemBase):
    """An initial value problem `du/dt = f(u, p, t), u(t0) = u0` over `tspan = (t0, tf)`.

    Problems are immutable; use `remake` to obtain a copy with some fields replaced.
    """
    __slots__ = ()

    def __new__(cls, f, u0, tspan, p=None):
        if not isinstance(f, ODEFunction):
            f = ODEFunction(f)

        u0 = torch.as_tensor(u0)
        if not torch.is_floating_point(u0):
            u0 = u0.to(torch.get_default_dtype())
        if u0.ndimension() != 1:
            raise ConfigurationError('u0 must be one dimensional, got shape {}'.format(tuple(u0.shape)),
                                     component='problem')

        if p is None:
            p = torch.zeros(0, dtype=u0.dtype, device=u0.device)
        p = torch.as_tensor(p)
        if not torch.is_floating_point(p):
            p = p.to(u0.dtype)
        if p.ndimension() != 1:
            raise ConfigurationError('p must be one dimensional, got shape {}'.format(tuple(p.shape)),
                                     component='problem')

        try:
            t0, tf = tspan
        except (TypeError, ValueError):
            raise ConfigurationError('tspan must be a pair (t0, tf), got {!r}'.format(tspan), component='problem')
        t0, tf = float(t0), float(tf)
        if not t0 < tf:
            raise ConfigurationError('tspan must satisfy t0 < tf, got ({}, {})'.format(t0, tf), component='problem')

        return super(ODEProblem, cls).__new__(cls, f, u0, (t0, tf), p)

    def remake(self, **changes):
        fields = self._asdict()
        unknown = set(changes) - set(fields)
        if unknown:
            raise ConfigurationError('unknown ODEProblem fields {}'.format(sorted(unknown)), component='problem')
        fields.update(changes)
        return ODEProblem(**fields)

    @property
    def state_dim(self):
        return self.u0.shape[0]

    @property
    def num_params(self):
        return self.p.shape[0]

    def rhs(self):
        """The problem as a `func(t, y)` for `odeint`."""
        f = self.f
        p = self.p

        def func(t, y):
            return f(y, p, t)
        return func
