import torch
from .errors import ConfigurationError
from .explicit_rk import Dopri5Solver, Bosh3Solver
from .fixed_grid import Euler, Midpoint, RK4
from .misc import _check_inputs
from .trajectory import _DenseOutput, Trajectory

SOLVERS = {
    'dopri5': Dopri5Solver,
    'bosh3': Bosh3Solver,
    'euler': Euler,
    'midpoint': Midpoint,
    'rk4': RK4,
}


def _integrate(func, y0, t, rtol, atol, method, options, record):
    func, y0, t, rtol, atol, method, options, t_is_reversed = _check_inputs(func, y0, t, rtol, atol, method,
                                                                            options, SOLVERS)
    solver = SOLVERS[method](func=func, y0=y0, rtol=rtol, atol=atol, is_reversed=t_is_reversed, **options)
    solution = solver.integrate(t, record=record)
    return solution, solver.segments, t_is_reversed


def odeint(func, y0, t, *, rtol=1e-7, atol=1e-9, method=None, options=None):
    """Integrate a system of ordinary differential equations.

    Solves the initial value problem for a non-stiff system of first order ODEs:
        ```
        dy/dt = func(t, y), y(t[0]) = y0
        ```
    where y is a Tensor of any shape.

    Output dtypes and numerical precision are based on the dtypes of the inputs `y0`.

    Args:
        func: Function that maps a scalar Tensor `t` and a Tensor holding the state `y`
            into a Tensor of state derivatives with respect to time.
        y0: N-D Tensor giving starting value of `y` at time point `t[0]`.
        t: 1-D Tensor holding a sequence of time points for which to solve for
            `y`, in either increasing or decreasing order. The first element of
            this sequence is taken to be the initial time point.
        rtol: optional float or Tensor (shaped like `y0`) specifying an upper bound on relative error.
        atol: optional float or Tensor (shaped like `y0`) specifying an upper bound on absolute error.
        method: optional string indicating the integration method to use.
        options: optional dict of configuring options for the indicated integration
            method. `cancel_event` (a `threading.Event`) is accepted by every method and is
            checked before each step.

    Returns:
        y: Tensor, where the first dimension corresponds to different
            time points. Contains the solved value of y for each desired time point in
            `t`, with the initial value `y0` being the first element along the first
            dimension.

    Raises:
        ConfigurationError: if an invalid `method` is provided.
        NumericalDivergenceError: if the state becomes non-finite or the step size collapses.
        IntegrationCancelled: if `cancel_event` is set during the solve.
    """
    solution, _, _ = _integrate(func, y0, t, rtol, atol, method, options, record=False)
    return solution


def odeint_dense(func, y0, t, *, rtol=1e-7, atol=1e-9, method=None, options=None):
    """As `odeint`, but also returns a dense interpolant over the whole of `t[0]..t[-1]`."""
    solution, segments, t_is_reversed = _integrate(func, y0, t, rtol, atol, method, options, record=True)
    return solution, _DenseOutput(segments, reversed=t_is_reversed)


def solve(problem, method='dopri5', rtol=1e-7, atol=1e-9, saveat=None, dense=True, options=None):
    """Solve an `ODEProblem` over its time span, producing a `Trajectory`.

    Args:
        problem: the `ODEProblem` to solve.
        method: integration method, one of `SOLVERS`.
        rtol, atol: tolerances, as for `odeint`.
        saveat: optional sequence of times at which to sample the solution. `t0` and `tf` are always
            sampled. If not given, the solution is sampled at the end of every step.
        dense: whether to retain the step interpolants, so that the trajectory can be queried at any time.
            Without them the trajectory is sparse (checkpointed).
        options: solver options, as for `odeint`.
    """
    t0, tf = problem.tspan
    u0 = problem.u0
    if saveat is None:
        t = torch.tensor([t0, tf], dtype=u0.dtype, device=u0.device)
    else:
        times = sorted(set(float(s) for s in saveat) | {t0, tf})
        if times[0] < t0 or times[-1] > tf:
            raise ConfigurationError('saveat times must lie within the time span [{}, {}]'.format(t0, tf),
                                     component='solve')
        t = torch.tensor(times, dtype=u0.dtype, device=u0.device)

    solution, segments, _ = _integrate(problem.rhs(), u0, t, rtol, atol, method, options, record=True)

    if saveat is None:
        ts = torch.tensor([t0] + [segment.t1 for segment in segments], dtype=u0.dtype, device=u0.device)
        us = torch.stack([u0] + [segment.y1 for segment in segments])
    else:
        ts = t
        us = solution
    dense_output = _DenseOutput(segments) if dense else None
    return Trajectory(ts, us, problem, method, rtol, atol, options, dense_output)
