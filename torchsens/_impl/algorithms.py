"""Sensitivity algorithms.

Each algorithm is a small immutable record of its options. Which one is used is a configuration value: the gradient
driver dispatches on the record's type, the records themselves carry no behaviour.
"""
import collections


ForwardSensitivity = collections.namedtuple(
    'ForwardSensitivity', 'autojacvec, reentrant, max_workers', defaults=('forward_ad', False, None))
ForwardSensitivity.__doc__ = """Continuous forward sensitivities: solve the augmented system `[u; du/dp; du/du0]`."""

ForwardDiffSensitivity = collections.namedtuple('ForwardDiffSensitivity', '')
ForwardDiffSensitivity.__doc__ = """Forward-mode automatic differentiation through the integrator, one solve per input."""

BacksolveAdjoint = collections.namedtuple(
    'BacksolveAdjoint', 'autojacvec, checkpointing, quadrature_tolerances, stability_tol',
    defaults=('reverse_ad', False, None, 1e-4))
BacksolveAdjoint.__doc__ = """Continuous adjoint that recomputes the forward state by solving the ODE backwards.

Cheap in memory, but unstable whenever the backwards problem is ill-posed (dissipative or chaotic dynamics). With
`checkpointing=True` the recomputed state is reset to the stored forward state at every checkpoint. Drift of the
recomputed state beyond `stability_tol` (relative) is reported."""

InterpolatingAdjoint = collections.namedtuple(
    'InterpolatingAdjoint', 'autojacvec, checkpointing, quadrature_tolerances',
    defaults=('reverse_ad', False, None))
InterpolatingAdjoint.__doc__ = """Continuous adjoint reading the forward state from the trajectory's interpolant, or
recomputing it bracket by bracket from checkpoints."""

QuadratureAdjoint = collections.namedtuple(
    'QuadratureAdjoint', 'autojacvec, quadrature_tolerances, order',
    defaults=('reverse_ad', None, 7))
QuadratureAdjoint.__doc__ = """Continuous adjoint solving for the costate alone, then computing the parameter gradient by
adaptive Gauss-Legendre quadrature over the costate's dense output."""

ReverseDiffAdjoint = collections.namedtuple('ReverseDiffAdjoint', '')
ReverseDiffAdjoint.__doc__ = """Reverse-mode automatic differentiation through the integrator's operations."""

# PyTorch has a single tape-based reverse mode, so these all differentiate through the integrator with it.
TrackerAdjoint = collections.namedtuple('TrackerAdjoint', '')
ZygoteAdjoint = collections.namedtuple('ZygoteAdjoint', '')
PassThrough = collections.namedtuple('PassThrough', '')

ADJOINT_ALGORITHMS = (BacksolveAdjoint, InterpolatingAdjoint, QuadratureAdjoint)
TAPE_ALGORITHMS = (ReverseDiffAdjoint, TrackerAdjoint, ZygoteAdjoint, PassThrough)
ALGORITHMS = (ForwardSensitivity, ForwardDiffSensitivity) + ADJOINT_ALGORITHMS + TAPE_ALGORITHMS
