"""Jacobian-vector and vector-Jacobian products.

Every provider exposes the same two operations on a function `fn` of a single 1-D Tensor `x`:

    jvp(fn, x, v) = (dfn/dx) v
    vjp(fn, x, v) = v^T (dfn/dx)

Providers are plain objects handed to the sensitivity algorithms at call time; nothing in torchsens picks one up
implicitly.
"""
import threading
import torch
import torch.autograd.forward_ad as fwAD
from .errors import ConfigurationError

AUTOJACVEC_MODES = ('forward_ad', 'reverse_ad', 'finite_diff', 'user_jacobian')


class ReverseAD(object):
    """Reverse-mode products through `torch.autograd`."""

    def vjp(self, fn, x, v):
        with torch.enable_grad():
            x = x.detach().requires_grad_(True)
            out = fn(x)
            if not out.requires_grad:
                # fn does not depend on x at all.
                return torch.zeros_like(x)
            vjp_x, = torch.autograd.grad(out, x, v, allow_unused=True)
        return torch.zeros_like(x) if vjp_x is None else vjp_x

    def jvp(self, fn, x, v):
        with torch.enable_grad():
            _, out = torch.autograd.functional.jvp(fn, x.detach(), v)
        return out


class ForwardAD(object):
    """Forward-mode products through dual tensors.

    Only one forward AD level can be active per process, so concurrent calls are serialised.
    """

    _lock = threading.RLock()

    def jvp(self, fn, x, v):
        with self._lock, fwAD.dual_level():
            out = fn(fwAD.make_dual(x.detach(), v.to(x)))
            primal, tangent = fwAD.unpack_dual(out)
            if tangent is None:
                return torch.zeros_like(primal)
            return tangent.clone()

    def vjp(self, fn, x, v):
        # Assemble the Jacobian a column at a time.
        basis = torch.eye(x.shape[0], dtype=x.dtype, device=x.device)
        columns = [self.jvp(fn, x, e) for e in basis]
        return torch.stack([(v * column).sum() for column in columns]) if columns else torch.zeros_like(x)


class FiniteDiff(object):
    """Central finite differences. Cheap to set up and needs nothing from `fn`, but only approximate."""

    def __init__(self, rel_step=None):
        self.rel_step = rel_step

    def _step(self, x):
        rel_step = self.rel_step
        if rel_step is None:
            rel_step = torch.finfo(x.dtype).eps ** (1 / 3)
        return rel_step * max(1., float(x.abs().max())) if x.numel() else rel_step

    def jvp(self, fn, x, v):
        x = x.detach()
        v_norm = float(v.abs().max()) if v.numel() else 0.
        if v_norm == 0:
            return torch.zeros_like(fn(x))
        h = self._step(x) / v_norm
        return (fn(x + h * v) - fn(x - h * v)) / (2 * h)

    def vjp(self, fn, x, v):
        x = x.detach()
        h = self._step(x)
        columns = []
        for j in range(x.shape[0]):
            e = torch.zeros_like(x)
            e[j] = h
            columns.append((fn(x + e) - fn(x - e)) / (2 * h))
        if not columns:
            return torch.zeros_like(x)
        return torch.stack([(v * column).sum() for column in columns])


class UserJacobian(object):
    """Products with a user-supplied Jacobian, available as `fn.jacobian(x)`.

    Functions without a Jacobian (cost functions, for example) fall back to `fallback`, reverse mode by default.
    """

    def __init__(self, fallback=None):
        self.fallback = ReverseAD() if fallback is None else fallback

    @staticmethod
    def _jacobian(fn, x):
        jacobian = getattr(fn, 'jacobian', None)
        if jacobian is None:
            return None
        return jacobian(x.detach())

    def jvp(self, fn, x, v):
        J = self._jacobian(fn, x)
        if J is None:
            return self.fallback.jvp(fn, x, v)
        return J.matmul(v)

    def vjp(self, fn, x, v):
        J = self._jacobian(fn, x)
        if J is None:
            return self.fallback.vjp(fn, x, v)
        return v.matmul(J)


_PROVIDERS = {
    'forward_ad': ForwardAD,
    'reverse_ad': ReverseAD,
    'finite_diff': FiniteDiff,
    'user_jacobian': UserJacobian,
}


def make_provider(mode):
    """Build the provider for one of the `AUTOJACVEC_MODES`."""
    try:
        return _PROVIDERS[mode]()
    except (KeyError, TypeError):
        raise ConfigurationError('Invalid autojacvec mode {!r}. Must be one of {}'.format(mode, AUTOJACVEC_MODES),
                                 component='autodiff')


class _StateFunction(object):
    """`x = [u; p] -> f(u, p, t)` at a fixed time, with the analytic Jacobian `[df/du, df/dp]` when available."""

    def __init__(self, ode_function, n, t):
        self.ode_function = ode_function
        self.n = n
        self.t = t
        if ode_function.has_jacobian:
            self.jacobian = self._jacobian

    def __call__(self, x):
        return self.ode_function(x[:self.n], x[self.n:], self.t)

    def _jacobian(self, x):
        u, p = x[:self.n], x[self.n:]
        m = p.shape[0]
        J = torch.as_tensor(self.ode_function.jac(u, p, self.t), dtype=x.dtype, device=x.device)
        Jp = torch.as_tensor(self.ode_function.paramjac(u, p, self.t), dtype=x.dtype, device=x.device)
        if J.shape != (self.n, self.n):
            raise ConfigurationError('jac returned shape {}, expected {}'.format(tuple(J.shape), (self.n, self.n)),
                                     time=float(self.t), component='user_jacobian')
        if Jp.shape != (self.n, m):
            raise ConfigurationError('paramjac returned shape {}, expected {}; the parameter count must match '
                                     'the problem parameters'.format(tuple(Jp.shape), (self.n, m)),
                                     time=float(self.t), component='user_jacobian')
        return torch.cat([J, Jp], dim=1)


def state_function(problem, t, provider):
    fn = _StateFunction(problem.f, problem.state_dim, t)
    if isinstance(provider, UserJacobian) and not problem.f.has_jacobian:
        raise ConfigurationError("autojacvec='user_jacobian' needs an ODEFunction with both `jac` and `paramjac`",
                                 component='user_jacobian')
    return fn
