from .odeint import odeint, odeint_dense, solve, SOLVERS
from .problem import ODEFunction, ODEProblem
from .trajectory import Trajectory
from .autodiff import AUTOJACVEC_MODES, ForwardAD, ReverseAD, FiniteDiff, UserJacobian, make_provider
from .forward_sensitivity import forward_sensitivity, SensitivityExtractor
from .checkpointing import CheckpointManager, CheckpointPolicy
from .cost import ContinuousCost, DiscreteCost
from .algorithms import (ForwardSensitivity, ForwardDiffSensitivity, BacksolveAdjoint, InterpolatingAdjoint,
                         QuadratureAdjoint, ReverseDiffAdjoint, TrackerAdjoint, ZygoteAdjoint, PassThrough)
from .gradient import AdjointGradient, compute_gradient, adjoint_gradient
from .quadrature import gauss_legendre, adaptive_gauss_legendre
from .errors import (SensitivityError, ConfigurationError, NumericalDivergenceError, UnsupportedCombinationError,
                     IntegrationCancelled, StabilityWarning)
