import collections
import logging
import warnings
import torch
from .adjoint import backsolve_adjoint, interpolating_adjoint, quadrature_adjoint
from .algorithms import (ALGORITHMS, BacksolveAdjoint, ForwardDiffSensitivity, ForwardSensitivity,
                         InterpolatingAdjoint, PassThrough, QuadratureAdjoint, ReverseDiffAdjoint, TrackerAdjoint,
                         ZygoteAdjoint)
from .autodiff import make_provider
from .checkpointing import CheckpointManager, CheckpointPolicy
from .cost import DiscreteCost, check_cost
from .discrete_sensitivity import forward_diff_gradient, tape_gradient
from .errors import ConfigurationError, UnsupportedCombinationError
from .forward_sensitivity import forward_sensitivity
from .quadrature import gauss_legendre

logger = logging.getLogger(__name__)

_AdjointGradientBase = collections.namedtuple('_AdjointGradientBase', 'du0, dp')


class AdjointGradient(_AdjointGradientBase):
    """`(du0, dp)`: the gradient of a cost with respect to the initial state and the parameters.

    `stable` is False when the algorithm detected that its result may be inaccurate; currently only
    `BacksolveAdjoint` does, when its reconstruction of the forward state drifts.
    """

    def __new__(cls, du0, dp, stable=True):
        self = super(AdjointGradient, cls).__new__(cls, du0, dp)
        self.stable = stable
        return self

    def __repr__(self):
        return 'AdjointGradient(du0={!r}, dp={!r}, stable={})'.format(self.du0, self.dp, self.stable)


def _check_policy(algorithm, checkpoint_policy):
    if checkpoint_policy is None:
        return CheckpointPolicy(enabled=bool(getattr(algorithm, 'checkpointing', False)))
    if not isinstance(checkpoint_policy, CheckpointPolicy):
        raise ConfigurationError('checkpoint_policy must be a CheckpointPolicy, got {}'
                                 .format(type(checkpoint_policy).__name__), component='checkpointing')
    return checkpoint_policy


def _ignore_checkpointing(algorithm, policy, strict):
    if not policy.enabled:
        return
    msg = '{} recomputes the forward solution itself and does not use checkpoints'.format(type(algorithm).__name__)
    if strict:
        raise UnsupportedCombinationError(msg, component='checkpointing')
    warnings.warn(msg + '; the checkpoint policy is ignored')


def _forward_sensitivity_gradient(trajectory, algorithm, cost, policy, provider, rtol, atol, strict, options):
    _ignore_checkpointing(algorithm, policy, strict)
    problem = trajectory.problem
    p = problem.p.detach()
    n = problem.state_dim
    m = problem.num_params
    discrete = isinstance(cost, DiscreteCost)

    sensitivities, extract = forward_sensitivity(
        problem, trajectory.method, rtol, atol, autodiff=provider, u0_sensitivity=True,
        reentrant=algorithm.reentrant, max_workers=algorithm.max_workers,
        saveat=cost.ts if discrete else None, dense=True, options=options)

    def contribution(t, gu, gp):
        # Sensitivity matrices with one row per input: du/dp is (M, N), du/du0 is (N, N).
        _, dp_columns = extract(sensitivities, t=t)
        du0_columns = extract.u0_sensitivities(sensitivities, t=t)
        gu = gu.reshape(n)
        dp = torch.stack(dp_columns).matmul(gu) + gp.reshape(m) if m else gp.reshape(0)
        return torch.cat([torch.stack(du0_columns).matmul(gu), dp])

    with torch.no_grad():
        total = torch.zeros(n + m, dtype=p.dtype, device=p.device)
        if discrete:
            for i, t in enumerate(cost.ts):
                u, _ = extract(sensitivities, t=t)
                gu = cost.dg_du(u, p, t, i, provider)
                gp = cost.dg_dp(u, p, t, i, provider) if m else p
                total = total + contribution(t, gu, gp)
        else:
            def integrand(t):
                u, _ = extract(sensitivities, t=t)
                gu, gp = cost.gradients(u, p, t, provider)
                return contribution(t, gu, gp)

            steps = sensitivities.dense_output.breakpoints
            for a, b in zip(steps[:-1], steps[1:]):
                total = total + gauss_legendre(integrand, a, b)
    return AdjointGradient(total[:n], total[n:])


def _adjoint_gradient(trajectory, algorithm, cost, policy, provider, rtol, atol, strict, options):
    manager = CheckpointManager(trajectory, policy.times, policy.enabled, options)
    args = (manager, cost, provider, rtol, atol, trajectory.method, options, algorithm.quadrature_tolerances)
    if isinstance(algorithm, BacksolveAdjoint):
        du0, dp, stable = backsolve_adjoint(*args, stability_tol=algorithm.stability_tol, strict=strict)
        return AdjointGradient(du0, dp, stable)
    if isinstance(algorithm, QuadratureAdjoint):
        du0, dp = quadrature_adjoint(*args, order=algorithm.order)
    else:
        du0, dp = interpolating_adjoint(*args)
    logger.debug('%s re-integrated %d checkpoint brackets', type(algorithm).__name__, manager.reintegrations)
    return AdjointGradient(du0, dp)


def _forward_diff_gradient(trajectory, algorithm, cost, policy, provider, rtol, atol, strict, options):
    _ignore_checkpointing(algorithm, policy, strict)
    return AdjointGradient(*forward_diff_gradient(trajectory, cost, provider, rtol, atol, options))


def _tape_gradient(trajectory, algorithm, cost, policy, provider, rtol, atol, strict, options):
    _ignore_checkpointing(algorithm, policy, strict)
    return AdjointGradient(*tape_gradient(trajectory, cost, provider, rtol, atol, options))


_GRADIENTS = {
    ForwardSensitivity: _forward_sensitivity_gradient,
    ForwardDiffSensitivity: _forward_diff_gradient,
    BacksolveAdjoint: _adjoint_gradient,
    InterpolatingAdjoint: _adjoint_gradient,
    QuadratureAdjoint: _adjoint_gradient,
    ReverseDiffAdjoint: _tape_gradient,
    TrackerAdjoint: _tape_gradient,
    ZygoteAdjoint: _tape_gradient,
    PassThrough: _tape_gradient,
}


def compute_gradient(trajectory, algorithm, cost, checkpoint_policy=None, autodiff=None, rtol=None, atol=None,
                     strict=False, options=None):
    """Gradient of a cost functional of a solved problem with respect to its initial state and parameters.

    Args:
        trajectory: the `Trajectory` of the forward solve, from `solve`.
        algorithm: the sensitivity algorithm, an instance (or the class, for its defaults) of one of
            `ForwardSensitivity`, `ForwardDiffSensitivity`, `BacksolveAdjoint`, `InterpolatingAdjoint`,
            `QuadratureAdjoint`, `ReverseDiffAdjoint`, `TrackerAdjoint`, `ZygoteAdjoint` or `PassThrough`.
        cost: exactly one of a `DiscreteCost` or a `ContinuousCost`.
        checkpoint_policy: optional `CheckpointPolicy`. Defaults to the algorithm's own `checkpointing` setting
            with the trajectory's sample times as checkpoints. Without checkpointing the trajectory must be dense.
        autodiff: optional provider of Jacobian-vector products, overriding the algorithm's `autojacvec` mode.
        rtol, atol: tolerances for the sensitivity or adjoint solves. Default to those of the forward solve.
        strict: raise `UnsupportedCombinationError` where a warning would otherwise be issued.
        options: solver options for the sensitivity or adjoint solves. Default to those of the forward solve.

    Returns:
        An `AdjointGradient`, unpacking as `du0, dp`.

    Raises:
        ConfigurationError: for an invalid cost, checkpoint policy or algorithm.
        NumericalDivergenceError: if a solve diverges.
        UnsupportedCombinationError: in strict mode, instead of a warning.
        IntegrationCancelled: if `options['cancel_event']` is set.
    """
    if isinstance(algorithm, type) and issubclass(algorithm, ALGORITHMS):
        algorithm = algorithm()
    try:
        gradient = _GRADIENTS[type(algorithm)]
    except KeyError:
        raise ConfigurationError('Invalid sensitivity algorithm {!r}. Must be one of {}'
                                 .format(algorithm, [a.__name__ for a in ALGORITHMS]), component='gradient')

    cost = check_cost(cost)
    cost.validate(trajectory.tspan)
    policy = _check_policy(algorithm, checkpoint_policy)
    provider = autodiff if autodiff is not None else make_provider(getattr(algorithm, 'autojacvec', 'reverse_ad'))
    rtol = trajectory.rtol if rtol is None else rtol
    atol = trajectory.atol if atol is None else atol
    options = trajectory.options if options is None else options

    logger.debug('computing gradient with %r', algorithm)
    return gradient(trajectory, algorithm, cost, policy, provider, rtol, atol, strict, options)


def adjoint_gradient(trajectory, algorithm, cost, checkpoint_policy=None, autodiff=None, rtol=None, atol=None,
                     strict=False, options=None):
    """Alias of `compute_gradient`."""
    return compute_gradient(trajectory, algorithm, cost, checkpoint_policy, autodiff, rtol, atol, strict, options)
