# Sensitivities are compared at tight tolerances, which float32 cannot meet. MPS only supports float32.
import torch
if torch.backends.mps.is_available():
    torch.set_default_dtype(torch.float32)
else:
    torch.set_default_dtype(torch.float64)

from ._impl import odeint
from ._impl import odeint_dense
from ._impl import solve
from ._impl import ODEFunction, ODEProblem, Trajectory
from ._impl import forward_sensitivity, SensitivityExtractor
from ._impl import AUTOJACVEC_MODES, ForwardAD, ReverseAD, FiniteDiff, UserJacobian, make_provider
from ._impl import CheckpointManager, CheckpointPolicy
from ._impl import ContinuousCost, DiscreteCost
from ._impl import (ForwardSensitivity, ForwardDiffSensitivity, BacksolveAdjoint, InterpolatingAdjoint,
                    QuadratureAdjoint, ReverseDiffAdjoint, TrackerAdjoint, ZygoteAdjoint, PassThrough)
from ._impl import AdjointGradient, compute_gradient, adjoint_gradient
from ._impl import gauss_legendre, adaptive_gauss_legendre
from ._impl import (SensitivityError, ConfigurationError, NumericalDivergenceError, UnsupportedCombinationError,
                    IntegrationCancelled, StabilityWarning)
__version__ = "0.1.0"
