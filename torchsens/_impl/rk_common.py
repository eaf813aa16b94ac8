import collections
import torch
from .errors import NumericalDivergenceError
from .interp import _interp_evaluate, _interp_fit
from .misc import (_compute_error_ratio,
                   _select_initial_step,
                   _optimal_step_size,
                   _rms_norm)
from .solvers import AdaptiveStepsizeODESolver


_ButcherTableau = collections.namedtuple('_ButcherTableau', 'alpha, beta, c_sol, c_error')


_RungeKuttaState = collections.namedtuple('_RungeKuttaState', 'y1, f1, t0, t1, dt, interp_coeff')
# Saved state of the Runge Kutta solver.
#
# Attributes:
#     y1: Tensor giving the function value at the end of the last time step.
#     f1: Tensor giving derivative at the end of the last time step.
#     t0: scalar Tensor giving start of the last time step.
#     t1: scalar Tensor giving end of the last time step.
#     dt: scalar Tensor giving the size for the next time step.
#     interp_coeff: list of Tensors giving coefficients for polynomial
#         interpolation between `t0` and `t1`.


def _runge_kutta_step(func, y0, f0, t0, dt, t1, tableau):
    """Take an arbitrary Runge-Kutta step and estimate error.

    Args:
        func: Function to evaluate like `func(t, y)` to compute the time derivative of `y`.
        y0: Tensor initial value for the state.
        f0: Tensor initial value for the derivative, computed from `func(t0, y0)`.
        t0: scalar Tensor giving the initial time.
        dt: scalar Tensor giving the size of the desired time step.
        t1: scalar Tensor giving the end time; equal to t0 + dt. This is used (rather than t0 + dt) to ensure
            floating point accuracy when needed.
        tableau: _ButcherTableau describing how to take the Runge-Kutta step.

    Returns:
        Tuple `(y1, f1, y1_error, k)` giving the estimated function value after
        the Runge-Kutta step at `t1 = t0 + dt`, the derivative of the state at `t1`,
        estimated error at `t1`, and a Tensor of Runge-Kutta stages `k` (stacked along the
        last dimension) used for calculating these terms.
    """

    # Stages are kept in a list and stacked as needed, rather than written into a preallocated buffer, so that the
    # step stays transparent to both reverse-mode and forward-mode automatic differentiation.
    k = [f0]
    for alpha_i, beta_i in zip(tableau.alpha, tableau.beta):
        if alpha_i == 1.:
            ti = t1
        else:
            ti = t0 + alpha_i * dt
        yi = y0 + torch.stack(k, dim=-1).matmul(beta_i * dt).view_as(f0)
        k.append(func(ti, yi))
    k = torch.stack(k, dim=-1)

    if not (tableau.c_sol[-1] == 0 and (tableau.c_sol[:-1] == tableau.beta[-1]).all()):
        # This property (true for Dormand-Prince) lets us save a few FLOPs.
        yi = y0 + k.matmul(dt * tableau.c_sol).view_as(f0)

    y1 = yi
    f1 = k[..., -1]
    y1_error = k.matmul(dt * tableau.c_error)
    return y1, f1, y1_error, k


# Precompute divisions
_one_sixth = 1 / 6


def rk4_step_func(func, t0, dt, t1, y0, f0=None):
    k1 = f0
    if k1 is None:
        k1 = func(t0, y0)
    half_dt = dt * 0.5
    k2 = func(t0 + half_dt, y0 + half_dt * k1)
    k3 = func(t0 + half_dt, y0 + half_dt * k2)
    k4 = func(t1, y0 + dt * k3)
    return (k1 + 2 * (k2 + k3) + k4) * dt * _one_sixth


class RKAdaptiveStepsizeODESolver(AdaptiveStepsizeODESolver):
    order: int
    tableau: _ButcherTableau
    mid: torch.Tensor

    def __init__(self, func, y0, rtol, atol, norm=None, first_step=None, safety=0.9, ifactor=10.0, dfactor=0.2,
                 max_num_steps=2 ** 31 - 1, min_step=0., **kwargs):
        super(RKAdaptiveStepsizeODESolver, self).__init__(func=func, y0=y0, rtol=rtol, atol=atol, **kwargs)

        dtype = y0.dtype
        device = y0.device

        self.norm = _rms_norm if norm is None else norm
        if first_step is None:
            self.first_step = None
        else:
            self.first_step = torch.as_tensor(first_step, dtype=dtype, device=device)
            assert not self.first_step.requires_grad, "first_step cannot require gradient."
        self.safety = torch.as_tensor(safety, dtype=dtype, device=device)
        self.ifactor = torch.as_tensor(ifactor, dtype=dtype, device=device)
        self.dfactor = torch.as_tensor(dfactor, dtype=dtype, device=device)
        assert not self.safety.requires_grad, "safety cannot require gradient."
        assert not self.ifactor.requires_grad, "ifactor cannot require gradient."
        assert not self.dfactor.requires_grad, "dfactor cannot require gradient."
        self.max_num_steps = max_num_steps
        self.min_step = float(min_step)

        # Copy from class to instance to set device
        self.tableau = _ButcherTableau(alpha=self.tableau.alpha.to(device=device, dtype=dtype),
                                       beta=[b.to(device=device, dtype=dtype) for b in self.tableau.beta],
                                       c_sol=self.tableau.c_sol.to(device=device, dtype=dtype),
                                       c_error=self.tableau.c_error.to(device=device, dtype=dtype))
        self.mid = self.mid.to(device=device, dtype=dtype)

    def _before_integrate(self, t):
        f0 = self.func(t[0], self.y0)
        if self.first_step is None:
            first_step = _select_initial_step(self.func, t[0], self.y0, self.order - 1, self.rtol, self.atol,
                                              self.norm, f0=f0, t1=t[-1])
        else:
            first_step = self.first_step
        self.t_end = t[-1]
        self.rk_state = _RungeKuttaState(self.y0, f0, t[0], t[0], first_step, [self.y0] * 5)
        self.n_steps = 0

    def _advance(self, next_t):
        """Interpolate through the next time point, integrating as necessary."""
        while next_t > self.rk_state.t1:
            if self.n_steps >= self.max_num_steps:
                raise NumericalDivergenceError('max_num_steps exceeded ({}>={})'.format(self.n_steps,
                                                                                       self.max_num_steps),
                                               time=self._user_time(self.rk_state.t1), component='solver')
            self.rk_state = self._adaptive_step(self.rk_state)
            self.n_steps += 1
        if next_t == self.rk_state.t1:
            return self.rk_state.y1
        return _interp_evaluate(self.rk_state.interp_coeff, self.rk_state.t0, self.rk_state.t1, next_t)

    def _adaptive_step(self, rk_state):
        """Take an adaptive Runge-Kutta step to integrate the ODE."""
        y0, f0, _, t0, dt, interp_coeff = rk_state
        self._check_cancelled(t0)

        ########################################################
        #                      Assertions                      #
        ########################################################
        if not torch.isfinite(y0).all():
            raise NumericalDivergenceError('non-finite values in state `y`', time=self._user_time(t0),
                                           component='solver')
        if not torch.isfinite(dt) or dt <= self.min_step or t0 + dt <= t0:
            raise NumericalDivergenceError('step size collapsed to {}'.format(dt.item()), time=self._user_time(t0),
                                           component='solver', tolerance=(self.rtol, self.atol))

        ########################################################
        #         Make step, never stepping past the end       #
        ########################################################
        t1 = t0 + dt
        if t1 >= self.t_end:
            t1 = self.t_end
            dt = t1 - t0

        y1, f1, y1_error, k = _runge_kutta_step(self.func, y0, f0, t0, dt, t1, tableau=self.tableau)

        ########################################################
        #                     Error Ratio                      #
        ########################################################
        with torch.no_grad():
            error_ratio = _compute_error_ratio(y1_error, self.rtol, self.atol, y0, y1, self.norm)
        accept_step = bool(torch.isfinite(error_ratio)) and error_ratio <= 1

        ########################################################
        #                   Update RK State                    #
        ########################################################
        if accept_step:
            t_next = t1
            y_next = y1
            interp_coeff = self._interp_fit(y0, y_next, k, dt)
            self._record(t0, t1, y0, y1, interp_coeff)
            f_next = f1
            dt_next = _optimal_step_size(dt, error_ratio, self.safety, self.ifactor, self.dfactor, self.order)
        else:
            t_next = t0
            y_next = y0
            f_next = f0
            if torch.isfinite(error_ratio):
                dt_next = _optimal_step_size(dt, error_ratio, self.safety, self.ifactor, self.dfactor, self.order)
            else:
                dt_next = dt * self.dfactor
        rk_state = _RungeKuttaState(y_next, f_next, t0, t_next, dt_next, interp_coeff)
        return rk_state

    def _interp_fit(self, y0, y1, k, dt):
        """Fit an interpolating polynomial to the results of a Runge-Kutta step."""
        y_mid = y0 + k.matmul(dt * self.mid).view_as(y0)
        f0 = k[..., 0]
        f1 = k[..., -1]
        return _interp_fit(y0, y1, y_mid, f0, f1, dt)
