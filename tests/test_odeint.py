import threading
import unittest
import torch
import torchsens

from problems import LinearODE, ExponentialDecay, lotka_volterra, lotka_volterra_f, ADAPTIVE_METHODS, FIXED_METHODS


def max_error(true, estimate):
    return (true - estimate).abs().max()


class TestSolverError(unittest.TestCase):

    def test_odeint(self):
        ode = LinearODE()
        func = ode.problem.rhs()
        t_points = torch.linspace(0, 1, 5)
        sol = torch.stack([ode.u_exact(t) for t in t_points])
        for reverse in (False, True):
            for method in ADAPTIVE_METHODS + FIXED_METHODS:
                options = {'step_size': 1e-3} if method in FIXED_METHODS else None
                eps = 5e-2 if method == 'euler' else 1e-4
                with self.subTest(reverse=reverse, method=method):
                    if reverse:
                        y0 = sol[-1]
                        t = t_points.flip(0)
                        expected = sol.flip(0)
                    else:
                        y0 = sol[0]
                        t = t_points
                        expected = sol
                    y = torchsens.odeint(func, y0, t, method=method, options=options)
                    self.assertLess(max_error(expected, y), eps)

    def test_tolerance(self):
        ode = ExponentialDecay()
        t = torch.tensor([0., ode.T])
        for rtol in (1e-4, 1e-8, 1e-11):
            with self.subTest(rtol=rtol):
                y = torchsens.odeint(ode.problem.rhs(), ode.problem.u0, t, rtol=rtol, atol=rtol)
                self.assertLess(abs(float(y[-1, 0]) - ode.u_exact(ode.T)), 100 * rtol)

    def test_evaluations_inside_span(self):
        for t in ([0., 0.01], [0.01, 0.]):
            for method in ADAPTIVE_METHODS:
                with self.subTest(t=t, method=method):
                    times = []

                    def func(t, y):
                        times.append(float(t))
                        return -0.001 * y

                    torchsens.odeint(func, torch.ones(1), torch.tensor(t), method=method)
                    self.assertGreaterEqual(min(times), 0.)
                    self.assertLessEqual(max(times), 0.01)

    def test_per_component_tolerance(self):
        ode = LinearODE()
        atol = torch.full((ode.dim,), 1e-10)
        y = torchsens.odeint(ode.problem.rhs(), ode.problem.u0, torch.tensor([0., 1.]), rtol=1e-10, atol=atol)
        self.assertLess(max_error(ode.u_exact(1.), y[-1]), 1e-8)


class TestDenseOutput(unittest.TestCase):

    def test_interpolation(self):
        ode = LinearODE()
        for method in ('dopri5', 'bosh3', 'rk4'):
            options = {'step_size': 0.01} if method == 'rk4' else None
            with self.subTest(method=method):
                _, dense = torchsens.odeint_dense(ode.problem.rhs(), ode.problem.u0, torch.tensor([0., 1.]),
                                                  rtol=1e-10, atol=1e-10, method=method, options=options)
                self.assertEqual(dense.span, (0., 1.))
                for t in (0., 0.123, 0.5, 0.77, 1.):
                    self.assertLess(max_error(ode.u_exact(t), dense(t)), 1e-6)

    def test_reversed_interpolation(self):
        ode = LinearODE()
        u1 = ode.u_exact(1.)
        _, dense = torchsens.odeint_dense(ode.problem.rhs(), u1, torch.tensor([1., 0.]), rtol=1e-10, atol=1e-10)
        self.assertTrue(dense.reversed)
        self.assertEqual(dense.span, (0., 1.))
        breakpoints = dense.breakpoints
        self.assertEqual(breakpoints, sorted(breakpoints))
        for t in (0., 0.3, 0.9, 1.):
            self.assertLess(max_error(ode.u_exact(t), dense(t)), 1e-6)


class TestSolve(unittest.TestCase):

    def test_every_step(self):
        problem = lotka_volterra()
        trajectory = torchsens.solve(problem, rtol=1e-8, atol=1e-8)
        self.assertTrue(trajectory.dense)
        self.assertEqual(trajectory.times[0], 0.)
        self.assertEqual(trajectory.times[-1], 10.)
        self.assertGreater(len(trajectory), 10)
        self.assertEqual(trajectory.times, sorted(trajectory.times))
        self.assertTrue(torch.equal(trajectory[0], problem.u0))

    def test_saveat(self):
        ode = LinearODE()
        trajectory = torchsens.solve(ode.problem, rtol=1e-10, atol=1e-10, saveat=[0.25, 0.5])
        self.assertEqual(trajectory.times, [0., 0.25, 0.5, 1.])
        for i, t in enumerate(trajectory.times):
            self.assertLess(max_error(ode.u_exact(t), trajectory[i]), 1e-8)
            self.assertTrue(torch.equal(trajectory(t), trajectory[i]))
        self.assertLess(max_error(ode.u_exact(0.8), trajectory(0.8)), 1e-6)

    def test_saveat_out_of_span(self):
        ode = LinearODE()
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.solve(ode.problem, saveat=[0.5, 2.])

    def test_sparse(self):
        ode = LinearODE()
        trajectory = torchsens.solve(ode.problem, saveat=[0.5], dense=False)
        self.assertFalse(trajectory.dense)
        self.assertTrue(torch.equal(trajectory(0.5), trajectory[1]))
        with self.assertRaises(torchsens.ConfigurationError):
            trajectory(0.25)
        dense = torchsens.solve(ode.problem, saveat=[0.5])
        self.assertFalse(dense.sparse().dense)

    def test_query_out_of_span(self):
        trajectory = torchsens.solve(LinearODE().problem)
        for t in (-0.1, 1.1):
            with self.subTest(t=t):
                with self.assertRaises(torchsens.ConfigurationError) as cm:
                    trajectory(t)
                self.assertEqual(cm.exception.time, t)

    def test_inplace(self):
        inplace = torchsens.solve(lotka_volterra(inplace=True), rtol=1e-8, atol=1e-8, saveat=[5.])
        out_of_place = torchsens.solve(lotka_volterra(), rtol=1e-8, atol=1e-8, saveat=[5.])
        self.assertTrue(torch.allclose(inplace.us, out_of_place.us, rtol=0, atol=1e-12))


class TestProblem(unittest.TestCase):

    def test_validation(self):
        f = lambda u, p, t: -u
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.ODEProblem(f, torch.ones(2, 2), (0., 1.))
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.ODEProblem(f, torch.ones(2), (1., 0.))
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.ODEProblem(f, torch.ones(2), (0., 1.), torch.ones(2, 2))
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.ODEProblem(f, torch.ones(2), 1.)

    def test_remake(self):
        problem = lotka_volterra()
        remade = problem.remake(p=torch.tensor([1., 1., 1.]))
        self.assertTrue(torch.equal(remade.p, torch.tensor([1., 1., 1.])))
        self.assertTrue(torch.equal(remade.u0, problem.u0))
        with self.assertRaises(torchsens.ConfigurationError):
            problem.remake(q=1)

    def test_no_parameters(self):
        problem = torchsens.ODEProblem(lambda u, p, t: -u, [1., 2.], (0, 1))
        self.assertEqual(problem.num_params, 0)
        self.assertEqual(problem.state_dim, 2)
        self.assertEqual(problem.tspan, (0., 1.))

    def test_evaluate_into_buffer(self):
        problem = lotka_volterra(inplace=True)
        out = torch.empty(2)
        self.assertIsNone(problem.f.evaluate(problem.u0, problem.p, 0., out=out))
        self.assertTrue(torch.equal(out, lotka_volterra_f(problem.u0, problem.p, 0.)))


class TestErrors(unittest.TestCase):

    def test_invalid_method(self):
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.solve(LinearODE().problem, method='not_a_method')

    def test_divergence(self):
        problem = torchsens.ODEProblem(lambda u, p, t: u ** 2, [1.], (0., 2.))
        with self.assertRaises(torchsens.NumericalDivergenceError) as cm:
            torchsens.solve(problem)
        self.assertIsNotNone(cm.exception.time)
        self.assertLess(cm.exception.time, 2.)

    def test_non_finite(self):
        problem = torchsens.ODEProblem(lambda u, p, t: u * float('nan'), [1.], (0., 1.))
        for method, options in (('dopri5', None), ('euler', {'step_size': 0.1})):
            with self.subTest(method=method):
                with self.assertRaises(torchsens.NumericalDivergenceError):
                    torchsens.solve(problem, method=method, options=options)

    def test_max_num_steps(self):
        with self.assertRaises(torchsens.NumericalDivergenceError):
            torchsens.solve(lotka_volterra(), options={'max_num_steps': 3})

    def test_cancellation(self):
        cancel_event = threading.Event()
        calls = []

        def f(u, p, t):
            calls.append(t)
            if len(calls) > 20:
                cancel_event.set()
            return -u

        problem = torchsens.ODEProblem(f, [1.], (0., 100.))
        with self.assertRaises(torchsens.IntegrationCancelled):
            torchsens.solve(problem, rtol=1e-10, atol=1e-10, options={'cancel_event': cancel_event})

    def test_error_context(self):
        err = torchsens.NumericalDivergenceError('diverged', time=1.5, bracket=(1., 2.), component='solver',
                                                 tolerance=1e-6)
        message = str(err)
        for part in ('diverged', 't=1.5', 'bracket=[1.0, 2.0]', 'component=solver', 'tolerance=1e-06'):
            self.assertIn(part, message)
        self.assertIsInstance(torchsens.ConfigurationError('x'), ValueError)


if __name__ == '__main__':
    unittest.main()
