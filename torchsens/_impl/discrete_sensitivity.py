"""Differentiate-through-the-solver sensitivities.

Rather than solving a sensitivity or adjoint equation, these differentiate the integrator's own arithmetic, in forward
mode (dual numbers) or reverse mode (the autograd tape). The cost is represented by a surrogate scalar

    L = sum_i dg_i . u(ts[i]) + dg_dp_i . p                       (discrete cost)
    L = int g_u(t) . u(t) + g_p(t) . p dt                          (continuous cost)

where the `dg` and `g_*` factors are evaluated on the primal solution and held constant. The derivative of `L` with
respect to `u0` and `p` is then the gradient of the cost, and only the cost's derivatives are ever needed.
"""
import torch
import torch.autograd.forward_ad as fwAD
from .autodiff import ForwardAD, ReverseAD
from .cost import DiscreteCost
from .odeint import solve
from .quadrature import gauss_legendre


def _surrogate(trajectory, cost, p, provider, order=7):
    u0 = trajectory.us[0]
    p_value = p.detach()
    total = torch.zeros((), dtype=u0.dtype, device=u0.device)

    if isinstance(cost, DiscreteCost):
        for i, t in enumerate(cost.ts):
            u = trajectory(t)
            total = total + (cost.dg_du(u.detach(), p_value, t, i, provider).reshape(-1) * u).sum()
            if p.shape[0]:
                total = total + (cost.dg_dp(u.detach(), p_value, t, i, provider).reshape(-1) * p).sum()
        return total

    def integrand(t):
        u = trajectory(t)
        gu, gp = cost.gradients(u.detach(), p_value, t, provider)
        return (gu.reshape(-1) * u).sum() + (gp.reshape(-1) * p).sum()

    steps = trajectory.dense_output.breakpoints
    for a, b in zip(steps[:-1], steps[1:]):
        total = total + gauss_legendre(integrand, a, b, order)
    return total


def _resolve(trajectory, cost, u0, p, rtol, atol, options):
    problem = trajectory.problem.remake(u0=u0, p=p)
    saveat = cost.ts if isinstance(cost, DiscreteCost) else None
    return solve(problem, trajectory.method, rtol, atol, saveat=saveat, dense=True, options=options)


def forward_diff_gradient(trajectory, cost, provider, rtol, atol, options):
    """Gradient by forward-mode differentiation of the solver, one solve per component of `u0` and `p`.

    The solves hold the process-wide dual level, so concurrent calls from several threads run one after another.
    """
    problem = trajectory.problem
    u0 = problem.u0.detach()
    p = problem.p.detach()
    n = u0.shape[0]
    m = p.shape[0]
    if isinstance(provider, ForwardAD):
        # The cost derivatives are taken inside the solver's dual level, and dual levels do not nest.
        provider = ReverseAD()

    grad = []
    for k in range(n + m):
        tangent = torch.zeros(n + m, dtype=u0.dtype, device=u0.device)
        tangent[k] = 1.
        with ForwardAD._lock, fwAD.dual_level():
            u0_dual = fwAD.make_dual(u0, tangent[:n])
            p_dual = fwAD.make_dual(p, tangent[n:]) if m else p
            solution = _resolve(trajectory, cost, u0_dual, p_dual, rtol, atol, options)
            surrogate = _surrogate(solution, cost, p_dual, provider)
            derivative = fwAD.unpack_dual(surrogate).tangent
            grad.append(torch.zeros((), dtype=u0.dtype, device=u0.device) if derivative is None
                        else derivative.clone())
    grad = torch.stack(grad) if grad else torch.zeros(0, dtype=u0.dtype, device=u0.device)
    return grad[:n], grad[n:]


def tape_gradient(trajectory, cost, provider, rtol, atol, options):
    """Gradient by reverse-mode differentiation of the solver."""
    problem = trajectory.problem
    u0 = problem.u0.detach().requires_grad_(True)
    p = problem.p.detach().requires_grad_(True)

    with torch.enable_grad():
        solution = _resolve(trajectory, cost, u0, p, rtol, atol, options)
        surrogate = _surrogate(solution, cost, p, provider)
        if not surrogate.requires_grad:
            return torch.zeros_like(u0).detach(), torch.zeros_like(p).detach()
        du0, dp = torch.autograd.grad(surrogate, (u0, p), allow_unused=True)
    du0 = torch.zeros_like(u0).detach() if du0 is None else du0
    dp = torch.zeros_like(p).detach() if dp is None else dp
    return du0, dp
