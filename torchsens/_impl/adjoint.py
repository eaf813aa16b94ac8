"""Continuous adjoint sensitivity analysis.

The costate `lam` and the parameter accumulator `mu` are integrated backwards from `tf`, where both are zero:

    dlam/dt = -(df/du)^T lam - dg/du
    dmu/dt  = -(df/dp)^T lam - dg/dp

so that `lam(t0)` is the gradient of the cost with respect to `u0` and `mu(t0)` the gradient with respect to `p`.
A discrete cost adds a jump `lam += dg(u(ts[i]), p, ts[i], i)` at each observation time instead of the running terms.

The sweep is split into segments at `t0`, `tf`, the observation times and the checkpoints, so that jumps and
re-synchronisations happen between two integrations and never inside one.
"""
import collections
import logging
import warnings
import torch
from .autodiff import state_function
from .cost import ContinuousCost
from .errors import ConfigurationError, NumericalDivergenceError, StabilityWarning, UnsupportedCombinationError
from .odeint import odeint, odeint_dense
from .quadrature import adaptive_gauss_legendre

logger = logging.getLogger(__name__)


def _component_tolerance(tol, size, like):
    if torch.is_tensor(tol) and tol.numel() > 1:
        return tol.to(dtype=like.dtype, device=like.device).reshape(-1)
    return torch.full((size,), float(tol), dtype=like.dtype, device=like.device)


def _scalar_tolerance(tol):
    if torch.is_tensor(tol):
        return float(tol.min())
    return float(tol)


def _check_quadrature_tolerances(quadrature_tolerances, atol, rtol):
    """`(abstol, reltol)` for the parameter accumulator, defaulting to the adjoint tolerances."""
    if quadrature_tolerances is None:
        return _scalar_tolerance(atol), _scalar_tolerance(rtol)
    try:
        abstol, reltol = quadrature_tolerances
        abstol, reltol = float(abstol), float(reltol)
    except (TypeError, ValueError):
        raise ConfigurationError('quadrature_tolerances must be a pair (abstol, reltol), got {!r}'
                                 .format(quadrature_tolerances), component='adjoint')
    if abstol < 0 or reltol < 0:
        raise ConfigurationError('quadrature tolerances must be non-negative', component='adjoint',
                                 tolerance=(abstol, reltol))
    return abstol, reltol


class _AdjointSweep(object):
    """Shared bookkeeping for a backward sweep: segment boundaries, jumps and the backward integrations."""

    def __init__(self, manager, cost, provider, rtol, atol, method, options, quadrature_tolerances=None):
        self.manager = manager
        self.trajectory = manager.trajectory
        self.problem = self.trajectory.problem
        self.cost = cost
        self.provider = provider
        self.rtol = rtol
        self.atol = atol
        self.method = method
        self.options = options
        self.quad_atol, self.quad_rtol = _check_quadrature_tolerances(quadrature_tolerances, atol, rtol)

        self.n = self.problem.state_dim
        self.m = self.problem.num_params
        self.p = self.problem.p.detach()
        self.continuous = isinstance(cost, ContinuousCost)

        self._jumps = collections.defaultdict(list)
        for i, t in enumerate(cost.ts):
            self._jumps[t].append(i)

    @property
    def boundaries(self):
        """Segment boundaries, ascending."""
        return sorted(set(self.trajectory.tspan) | set(self._jumps) | set(self.manager.points))

    def vjp(self, u, lam, t):
        """`(lam^T df/du, lam^T df/dp)` at the forward state `u`."""
        fn = state_function(self.problem, t, self.provider)
        vjp = self.provider.vjp(fn, torch.cat([u.detach(), self.p]), lam.detach())
        return vjp[:self.n], vjp[self.n:]

    def running_cost(self, u, t):
        return self.cost.gradients(u.detach(), self.p, t, self.provider)

    def apply_jumps(self, t, u, lam, mu):
        for i in reversed(self._jumps.get(t, ())):
            lam = lam + self.cost.dg_du(u, self.p, t, i, self.provider).reshape(self.n)
            if self.m:
                mu = mu + self.cost.dg_dp(u, self.p, t, i, self.provider).reshape(self.m)
        return lam, mu

    def _solve(self, solver, func, y, b, a, rtol, atol):
        logger.debug('adjoint segment [%s, %s]', a, b)
        t = torch.tensor([b, a], dtype=y.dtype, device=y.device)
        try:
            return solver(func, y, t, rtol=rtol, atol=atol, method=self.method, options=self.options)
        except NumericalDivergenceError as e:
            if e.bracket is not None:
                # Already located, by a checkpoint re-integration.
                raise
            raise NumericalDivergenceError('adjoint integration diverged: {}'.format(e.args[0]), time=e.time,
                                           bracket=(a, b), component='adjoint', tolerance=e.tolerance) from e

    def integrate(self, func, y, b, a, rtol, atol):
        return self._solve(odeint, func, y, b, a, rtol, atol)[-1]

    def integrate_dense(self, func, y, b, a, rtol, atol):
        solution, dense = self._solve(odeint_dense, func, y, b, a, rtol, atol)
        return solution[-1], dense

    def tolerances(self, sizes):
        """Per-component tolerances for an augmented state made of state-sized blocks and a parameter block."""
        like = self.trajectory.us
        rtol = [_component_tolerance(self.rtol, self.n, like) for _ in range(sizes)]
        atol = [_component_tolerance(self.atol, self.n, like) for _ in range(sizes)]
        rtol.append(torch.full((self.m,), self.quad_rtol, dtype=like.dtype, device=like.device))
        atol.append(torch.full((self.m,), self.quad_atol, dtype=like.dtype, device=like.device))
        return torch.cat(rtol), torch.cat(atol)


class _InterpolatingDynamics(object):

    def __init__(self, sweep):
        self.sweep = sweep

    def __call__(self, t, y):
        sweep = self.sweep
        n = sweep.n
        lam = y[:n]
        u = sweep.manager(t)
        vjp_u, vjp_p = sweep.vjp(u, lam, t)
        dlam = -vjp_u
        dmu = -vjp_p
        if sweep.continuous:
            gu, gp = sweep.running_cost(u, t)
            dlam = dlam - gu.reshape(n)
            dmu = dmu - gp.reshape(sweep.m)
        return torch.cat([dlam, dmu]).detach()


class _BacksolveDynamics(object):

    def __init__(self, sweep):
        self.sweep = sweep

    def __call__(self, t, y):
        sweep = self.sweep
        n = sweep.n
        u = y[:n]
        lam = y[n:2 * n]
        du = sweep.problem.f(u, sweep.p, t)
        vjp_u, vjp_p = sweep.vjp(u, lam, t)
        dlam = -vjp_u
        dmu = -vjp_p
        if sweep.continuous:
            gu, gp = sweep.running_cost(u, t)
            dlam = dlam - gu.reshape(n)
            dmu = dmu - gp.reshape(sweep.m)
        return torch.cat([du.reshape(n), dlam, dmu]).detach()


class _CostateDynamics(object):

    def __init__(self, sweep):
        self.sweep = sweep

    def __call__(self, t, lam):
        sweep = self.sweep
        u = sweep.manager(t)
        vjp_u, _ = sweep.vjp(u, lam, t)
        dlam = -vjp_u
        if sweep.continuous:
            gu, _ = sweep.running_cost(u, t)
            dlam = dlam - gu.reshape(sweep.n)
        return dlam.detach()


def _initial_costate(sweep):
    like = sweep.trajectory.us
    lam = torch.zeros(sweep.n, dtype=like.dtype, device=like.device)
    mu = torch.zeros(sweep.m, dtype=like.dtype, device=like.device)
    return lam, mu


def interpolating_adjoint(manager, cost, provider, rtol, atol, method, options, quadrature_tolerances=None):
    """Backward sweep reading the forward state from `manager`. Returns `(du0, dp)`."""
    sweep = _AdjointSweep(manager, cost, provider, rtol, atol, method, options, quadrature_tolerances)
    func = _InterpolatingDynamics(sweep)
    rtol, atol = sweep.tolerances(1)
    n = sweep.n

    with torch.no_grad():
        boundaries = sweep.boundaries
        lam, mu = _initial_costate(sweep)
        lam, mu = sweep.apply_jumps(boundaries[-1], manager(boundaries[-1]), lam, mu)
        for a, b in zip(reversed(boundaries[:-1]), reversed(boundaries[1:])):
            y = sweep.integrate(func, torch.cat([lam, mu]), b, a, rtol, atol)
            lam, mu = y[:n], y[n:]
            lam, mu = sweep.apply_jumps(a, manager(a), lam, mu)
    manager.clear()
    return lam, mu


def backsolve_adjoint(manager, cost, provider, rtol, atol, method, options, quadrature_tolerances=None,
                      stability_tol=1e-4, strict=False):
    """Backward sweep recomputing the forward state by integrating the ODE backwards alongside the costate.

    The backwards integration of the forward ODE is only well-posed for dynamics that are not dissipative or
    chaotic; otherwise the recomputed state drifts away from the forward solution and the gradient is wrong. The
    drift is measured against every stored forward state the sweep passes (samples of the trajectory and
    checkpoints). With checkpointing enabled the recomputed state is reset to the stored one at every checkpoint.

    Returns:
        `(du0, dp, stable)`, where `stable` is False if the drift exceeded `stability_tol` (relative).

    Raises:
        UnsupportedCombinationError: on excessive drift, if `strict`.
    """
    sweep = _AdjointSweep(manager, cost, provider, rtol, atol, method, options, quadrature_tolerances)
    func = _BacksolveDynamics(sweep)
    rtol, atol = sweep.tolerances(2)
    n = sweep.n
    trajectory = sweep.trajectory
    worst = (0., None)

    def reference_state(t):
        state = manager.state_at_checkpoint(t)
        if state is not None:
            return state
        i = trajectory.sample_index(t)
        if i is not None:
            return trajectory.us[i].detach()
        return None

    with torch.no_grad():
        boundaries = sweep.boundaries
        tf = boundaries[-1]
        u = reference_state(tf)
        lam, mu = _initial_costate(sweep)
        lam, mu = sweep.apply_jumps(tf, u, lam, mu)
        for a, b in zip(reversed(boundaries[:-1]), reversed(boundaries[1:])):
            y = sweep.integrate(func, torch.cat([u, lam, mu]), b, a, rtol, atol)
            u, lam, mu = y[:n], y[n:2 * n], y[2 * n:]

            reference = reference_state(a)
            if reference is not None:
                drift = float((u - reference).abs().max()) / max(float(reference.abs().max()), 1.)
                if drift > stability_tol:
                    if strict:
                        raise UnsupportedCombinationError(
                            'backsolve reconstruction of the forward state drifted by {:.3g} (relative); the '
                            'backwards problem is ill-conditioned, use InterpolatingAdjoint or enable '
                            'checkpointing'.format(drift), time=a, bracket=(a, b), component='backsolve',
                            tolerance=stability_tol)
                    if drift > worst[0]:
                        worst = (drift, a)
                if manager.enabled and manager.state_at_checkpoint(a) is not None:
                    u = reference
            lam, mu = sweep.apply_jumps(a, u, lam, mu)

    stable = worst[1] is None
    if not stable:
        warnings.warn('backsolve reconstruction of the forward state drifted by {:.3g} (relative) at t={}; the '
                      'gradient may be inaccurate'.format(worst[0], worst[1]), StabilityWarning)
    return lam, mu, stable


def quadrature_adjoint(manager, cost, provider, rtol, atol, method, options, quadrature_tolerances=None, order=7):
    """Backward sweep for the costate alone, followed by quadrature of the parameter gradient.

    `dp` is the integral of `lam^T df/dp + dg/dp` over each step of the costate solve, computed by adaptive
    Gauss-Legendre quadrature over the costate's dense output.
    """
    sweep = _AdjointSweep(manager, cost, provider, rtol, atol, method, options, quadrature_tolerances)
    func = _CostateDynamics(sweep)
    rtol = _component_tolerance(rtol, sweep.n, sweep.trajectory.us) if torch.is_tensor(rtol) else rtol
    atol = _component_tolerance(atol, sweep.n, sweep.trajectory.us) if torch.is_tensor(atol) else atol
    m = sweep.m

    def integrand(dense):
        def evaluate(t):
            u = manager(t)
            lam = dense(t)
            _, vjp_p = sweep.vjp(u, lam, t)
            if sweep.continuous:
                _, gp = sweep.running_cost(u, t)
                vjp_p = vjp_p + gp.reshape(m)
            return vjp_p
        return evaluate

    with torch.no_grad():
        boundaries = sweep.boundaries
        lam, mu = _initial_costate(sweep)
        lam, mu = sweep.apply_jumps(boundaries[-1], manager(boundaries[-1]), lam, mu)
        for a, b in zip(reversed(boundaries[:-1]), reversed(boundaries[1:])):
            lam, dense = sweep.integrate_dense(func, lam, b, a, rtol, atol)
            if m:
                steps = dense.breakpoints
                for step_a, step_b in zip(steps[:-1], steps[1:]):
                    mu = mu + adaptive_gauss_legendre(integrand(dense), step_a, step_b, sweep.quad_atol,
                                                      sweep.quad_rtol, order=order)
            lam, mu = sweep.apply_jumps(a, manager(a), lam, mu)
    manager.clear()
    return lam, mu
