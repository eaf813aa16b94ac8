import torch
from .errors import ConfigurationError
from .problem import _count_positional


def _out_of_place(fn, num_args, like=0):
    """Accept both `fn(*args) -> value` and the in-place `fn(out, *args)` convention.

    The buffer handed to an in-place `fn` is shaped like its argument number `like`.
    """
    if fn is None or _count_positional(fn) != num_args + 1:
        return fn

    def wrapped(*args):
        out = torch.zeros_like(args[like])
        fn(out, *args)
        return out
    return wrapped


def _as_tensor_like(value, x):
    return torch.as_tensor(value, dtype=x.dtype, device=x.device)


class DiscreteCost(object):
    """A cost `sum_i g(u(ts[i]), p, ts[i], i)` observed at the ascending times `ts`.

    Args:
        ts: ascending observation times, within the time span of the problem.
        dg: `dg(u, p, t, i)` (or `dg(out, u, p, t, i)`) giving `dg/du` at observation `i`, a vector of size N.
        g: the scalar cost `g(u, p, t, i)` itself. Only needed if `dg` is not given, in which case `dg` is obtained
            from it by automatic differentiation.
    """

    def __init__(self, ts, dg=None, g=None):
        if torch.is_tensor(ts):
            ts = ts.tolist()
        self.ts = [float(t) for t in ts]
        for a, b in zip(self.ts[:-1], self.ts[1:]):
            if not a <= b:
                raise ConfigurationError('observation times must be sorted in ascending order', time=b,
                                         component='cost')
        if dg is None and g is None:
            raise ConfigurationError('a discrete cost needs `dg` or `g`', component='cost')
        self.dg = _out_of_place(dg, 4)
        self.g = g

    def validate(self, tspan):
        t0, tf = tspan
        for t in self.ts:
            if not t0 <= t <= tf:
                raise ConfigurationError('observation time outside of the time span [{}, {}]'.format(t0, tf), time=t,
                                         component='cost')

    def dg_du(self, u, p, t, i, provider):
        if self.dg is not None:
            return _as_tensor_like(self.dg(u, p, t, i), u)
        n = u.shape[0]
        x = torch.cat([u.detach(), p.detach()])
        fn = lambda x_: _as_tensor_like(self.g(x_[:n], x_[n:], t, i), x_)
        return provider.vjp(fn, x, torch.ones((), dtype=x.dtype, device=x.device))[:n]

    def dg_dp(self, u, p, t, i, provider):
        # Explicit parameter dependence of a discrete cost only comes from `g`.
        if self.g is None:
            return torch.zeros_like(p)
        n = u.shape[0]
        x = torch.cat([u.detach(), p.detach()])
        fn = lambda x_: _as_tensor_like(self.g(x_[:n], x_[n:], t, i), x_)
        return provider.vjp(fn, x, torch.ones((), dtype=x.dtype, device=x.device))[n:]


class ContinuousCost(object):
    """A cost `int_{t0}^{tf} g(u(t), p, t) dt`.

    Args:
        g: the scalar running cost `g(u, p, t)`. Needed whenever one of the partial derivatives is not given.
        dg_du: `dg_du(u, p, t)` (or `dg_du(out, u, p, t)`), a vector of size N.
        dg_dp: `dg_dp(u, p, t)` (or `dg_dp(out, u, p, t)`), a vector of size M. Treated as zero if neither it
            nor `g` is given.
    """

    def __init__(self, g=None, dg_du=None, dg_dp=None):
        if dg_du is None and g is None:
            raise ConfigurationError('a continuous cost needs `dg_du` or `g`', component='cost')
        self.g = g
        self._dg_du = _out_of_place(dg_du, 3)
        self._dg_dp = _out_of_place(dg_dp, 3, like=1)

    def validate(self, tspan):
        pass

    @property
    def ts(self):
        return []

    def _from_g(self, u, p, t, provider):
        n = u.shape[0]
        x = torch.cat([u.detach(), p.detach()])
        fn = lambda x_: _as_tensor_like(self.g(x_[:n], x_[n:], t), x_)
        grad = provider.vjp(fn, x, torch.ones((), dtype=x.dtype, device=x.device))
        return grad[:n], grad[n:]

    def gradients(self, u, p, t, provider):
        """`(dg/du, dg/dp)` at `(u, p, t)`."""
        if self._dg_du is None or (self._dg_dp is None and self.g is not None):
            from_g = self._from_g(u, p, t, provider)
        if self._dg_du is None:
            gu = from_g[0]
        else:
            gu = _as_tensor_like(self._dg_du(u, p, t), u)
        if self._dg_dp is not None:
            gp = _as_tensor_like(self._dg_dp(u, p, t), p)
        elif self.g is not None:
            gp = from_g[1]
        else:
            gp = torch.zeros_like(p)
        return gu, gp


def check_cost(cost):
    """Exactly one of the two cost forms."""
    if isinstance(cost, (DiscreteCost, ContinuousCost)):
        return cost
    if isinstance(cost, (tuple, list)):
        raise ConfigurationError('discrete and continuous costs are mutually exclusive; pass exactly one cost',
                                 component='cost')
    raise ConfigurationError('cost must be a DiscreteCost or a ContinuousCost, got {}'.format(type(cost).__name__),
                             component='cost')
