import concurrent.futures
import warnings
import torch
from .autodiff import ForwardAD, make_provider, state_function
from .errors import ConfigurationError
from .odeint import solve
from .problem import ODEFunction, ODEProblem

# Forward sensitivities cost one extra jvp per parameter per function evaluation.
_LARGE_PARAMETER_COUNT = 100


class ForwardSensitivityFunction(object):
    """Right hand side of the augmented system `[u; S_1; ...; S_K]`.

    `S_j` is the j-th column of `du/dp` (for `j < M`) or of `du/du0` (for the seeded columns that follow), and
    evolves as `dS_j/dt = (df/du) S_j + (df/dp) e_j`, one Jacobian-vector product per column.
    """

    def __init__(self, problem, provider, num_u0_columns=0, executor=None):
        self.problem = problem
        self.provider = provider
        self.n = problem.state_dim
        self.m = problem.num_params
        self.num_columns = self.m + num_u0_columns
        self.executor = executor

        p = problem.p.detach()
        eye = torch.eye(self.m, dtype=p.dtype, device=p.device)
        self._param_directions = [eye[j] for j in range(self.m)]
        self._no_param_direction = torch.zeros_like(p)

    def __call__(self, y, p, t):
        n = self.n
        u = y[:n]
        S = y[n:].view(self.num_columns, n)
        p = self.problem.p.detach()
        fn = state_function(self.problem, t, self.provider)
        x = torch.cat([u, p])

        directions = []
        for j in range(self.num_columns):
            e = self._param_directions[j] if j < self.m else self._no_param_direction
            directions.append(torch.cat([S[j], e]))

        du = self.problem.f(u, p, t)
        if self.executor is None:
            dS = [self.provider.jvp(fn, x, v) for v in directions]
        else:
            dS = list(self.executor.map(lambda v: self.provider.jvp(fn, x, v), directions))
        return torch.cat([du] + [dS_j.reshape(n) for dS_j in dS])


class SensitivityExtractor(object):
    """Splits augmented states into `(u, dp)`, where `dp[j]` is `du/dp_j`.

    Call it on a trajectory of the augmented system in one of three ways:

        extract(traj)          # the whole series: u has shape (T, N), each dp[j] too
        extract(traj, i)       # the i-th sample
        extract(traj, t=t)     # at time t, interpolated if t is not a sample time
    """

    def __init__(self, n, m, num_u0_columns=0):
        self.n = n
        self.m = m
        self.num_u0_columns = num_u0_columns

    def _select(self, trajectory, index, t):
        if index is not None and t is not None:
            raise ConfigurationError('pass at most one of an index and a time', component='extract')
        if index is not None:
            return trajectory.us[index]
        if t is not None:
            return trajectory(t)
        return trajectory.us

    def _columns(self, y):
        n = self.n
        return y[..., n:].reshape(*y.shape[:-1], self.m + self.num_u0_columns, n)

    def __call__(self, trajectory, index=None, t=None):
        y = self._select(trajectory, index, t)
        u = y[..., :self.n]
        columns = self._columns(y)
        return u, tuple(columns[..., j, :] for j in range(self.m))

    def u0_sensitivities(self, trajectory, index=None, t=None):
        """The seeded columns `du/du0_k`, if the trajectory was computed with `u0_sensitivity=True`."""
        if self.num_u0_columns == 0:
            raise ConfigurationError('u0 sensitivities were not computed; pass u0_sensitivity=True',
                                     component='extract')
        y = self._select(trajectory, index, t)
        columns = self._columns(y)
        return tuple(columns[..., self.m + k, :] for k in range(self.num_u0_columns))


def forward_sensitivity(problem, method='dopri5', rtol=1e-7, atol=1e-9, *, autojacvec='forward_ad', autodiff=None,
                        u0_sensitivity=False, reentrant=False, max_workers=None, saveat=None, dense=True,
                        options=None):
    """Solve `problem` together with its parameter sensitivities `du/dp`.

    Args:
        problem: an `ODEProblem` with M parameters.
        method, rtol, atol, saveat, dense, options: as for `solve`, applied to the augmented system.
        autojacvec: how the Jacobian-vector products are computed, one of `AUTOJACVEC_MODES`.
        autodiff: a provider object, overriding `autojacvec`.
        u0_sensitivity: also carry `du/du0`, seeded with the identity at `t0`.
        reentrant: declare `problem.f` safe to call from several threads at once, so that the columns can be
            evaluated on a thread pool of `max_workers` threads. Forward-mode products (`ForwardAD`) share the
            process-wide dual level and still run one at a time; use `reverse_ad` or `finite_diff` for parallel
            columns.

    Returns:
        `(trajectory, extract)`: the trajectory of the augmented system and a `SensitivityExtractor` for it.
        With no parameters (and `u0_sensitivity=False`) this is the plain solve.
    """
    provider = make_provider(autojacvec) if autodiff is None else autodiff
    n = problem.state_dim
    m = problem.num_params
    num_u0_columns = n if u0_sensitivity else 0
    extract = SensitivityExtractor(n, m, num_u0_columns)

    if m + num_u0_columns == 0:
        return solve(problem, method, rtol, atol, saveat=saveat, dense=dense, options=options), extract

    if m > _LARGE_PARAMETER_COUNT:
        warnings.warn('forward sensitivity with {} parameters costs {} jacobian-vector products per function '
                      'evaluation; an adjoint method is likely to be faster'.format(m, m))
    if reentrant and isinstance(provider, ForwardAD):
        warnings.warn('reentrant=True has no effect with forward-mode products: only one dual level can be active '
                      'per process, so the sensitivity columns are evaluated one at a time')
    # Validates the user Jacobian up front, if that is what we are using.
    state_function(problem, problem.tspan[0], provider)

    u0 = problem.u0.detach()
    seed = [torch.zeros(m * n, dtype=u0.dtype, device=u0.device)]
    if u0_sensitivity:
        # Column k of the identity, stored column after column, is the identity flattened.
        seed.append(torch.eye(n, dtype=u0.dtype, device=u0.device).reshape(-1))
    aug_u0 = torch.cat([u0] + seed)

    executor = concurrent.futures.ThreadPoolExecutor(max_workers=max_workers) if reentrant else None
    try:
        aug_f = ForwardSensitivityFunction(problem, provider, num_u0_columns, executor)
        aug_problem = ODEProblem(ODEFunction(aug_f, inplace=False), aug_u0, problem.tspan, problem.p.detach())
        trajectory = solve(aug_problem, method, rtol, atol, saveat=saveat, dense=dense, options=options)
    finally:
        if executor is not None:
            executor.shutdown()
    return trajectory, extract
