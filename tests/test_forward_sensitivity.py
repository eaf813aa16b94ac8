import unittest
import warnings
import torch
import torchsens

from problems import LinearODE, ExponentialDecay, lotka_volterra


def max_error(true, estimate):
    return (true - estimate).abs().max()


class TestConsistency(unittest.TestCase):

    def test_state_matches_plain_solve(self):
        for ode, methods in ((LinearODE(), ('dopri5',)), (ExponentialDecay(), ('dopri5', 'bosh3'))):
            problem = ode.problem
            for method in methods:
                with self.subTest(ode=type(ode).__name__, method=method):
                    plain = torchsens.solve(problem, method, rtol=1e-10, atol=1e-10)
                    trajectory, extract = torchsens.forward_sensitivity(problem, method, rtol=1e-10, atol=1e-10)
                    for t in trajectory.times:
                        u, _ = extract(trajectory, t=t)
                        self.assertLess(max_error(plain(t), u), 1e-8)

    def test_lotka_volterra_state(self):
        problem = lotka_volterra()
        plain = torchsens.solve(problem, rtol=1e-10, atol=1e-10, saveat=[2.5, 5., 7.5])
        trajectory, extract = torchsens.forward_sensitivity(problem, rtol=1e-10, atol=1e-10, saveat=[2.5, 5., 7.5])
        u, _ = extract(trajectory)
        self.assertLess(max_error(plain.us, u), 1e-6)


class TestExtraction(unittest.TestCase):

    def test_shapes(self):
        problem = lotka_volterra(tspan=(0., 1.))
        trajectory, extract = torchsens.forward_sensitivity(problem)
        u, dp = extract(trajectory)
        self.assertEqual(u.shape, (len(trajectory), 2))
        self.assertEqual(len(dp), 3)
        for column in dp:
            self.assertEqual(column.shape, (len(trajectory), 2))
        u, dp = extract(trajectory, 3)
        self.assertEqual(u.shape, (2,))
        self.assertEqual(dp[0].shape, (2,))

    def test_idempotent(self):
        problem = lotka_volterra(tspan=(0., 2.))
        trajectory, extract = torchsens.forward_sensitivity(problem, rtol=1e-8, atol=1e-8)
        u_all, dp_all = extract(trajectory)
        for i in range(len(trajectory)):
            u_index, dp_index = extract(trajectory, i)
            u_time, dp_time = extract(trajectory, t=trajectory.times[i])
            self.assertTrue(torch.equal(u_index, u_time))
            self.assertTrue(torch.equal(u_index, u_all[i]))
            for j in range(3):
                self.assertTrue(torch.equal(dp_index[j], dp_time[j]))
                self.assertTrue(torch.equal(dp_index[j], dp_all[j][i]))

    def test_interpolated(self):
        ode = ExponentialDecay()
        trajectory, extract = torchsens.forward_sensitivity(ode.problem, rtol=1e-10, atol=1e-10)
        for t in (0.31, 1.7, 2.9):
            u, (du_dk,) = extract(trajectory, t=t)
            self.assertLess(abs(float(u[0]) - ode.u_exact(t)), 1e-7)
            self.assertLess(abs(float(du_dk[0]) - ode.du_dk(t)), 1e-7)

    def test_index_and_time(self):
        trajectory, extract = torchsens.forward_sensitivity(lotka_volterra(tspan=(0., 1.)))
        with self.assertRaises(torchsens.ConfigurationError):
            extract(trajectory, 1, t=0.5)

    def test_u0_sensitivities(self):
        ode = LinearODE()
        trajectory, extract = torchsens.forward_sensitivity(ode.problem, rtol=1e-10, atol=1e-10,
                                                            u0_sensitivity=True)
        columns = extract.u0_sensitivities(trajectory, t=1.)
        # Column k is du(1)/du0_k, the k-th column of the propagator.
        expected = ode.propagator(1.)
        for k, column in enumerate(columns):
            self.assertLess(max_error(expected[:, k], column), 1e-8)

        _, plain_extract = torchsens.forward_sensitivity(ode.problem)
        with self.assertRaises(torchsens.ConfigurationError):
            plain_extract.u0_sensitivities(trajectory)


class TestAutojacvec(unittest.TestCase):

    def test_modes(self):
        reference, extract = torchsens.forward_sensitivity(lotka_volterra(tspan=(0., 3.)), rtol=1e-10, atol=1e-10,
                                                           saveat=[3.])
        _, expected = extract(reference, -1)
        for mode in torchsens.AUTOJACVEC_MODES:
            problem = lotka_volterra(tspan=(0., 3.), jacobian=mode == 'user_jacobian')
            eps = 1e-5 if mode == 'finite_diff' else 1e-7
            with self.subTest(mode=mode):
                trajectory, extract = torchsens.forward_sensitivity(problem, rtol=1e-10, atol=1e-10,
                                                                    autojacvec=mode, saveat=[3.])
                _, dp = extract(trajectory, -1)
                for j in range(3):
                    self.assertLess(max_error(expected[j], dp[j]), eps)

    def test_inplace(self):
        problem = lotka_volterra(inplace=True, tspan=(0., 3.))
        for mode in ('forward_ad', 'reverse_ad'):
            with self.subTest(mode=mode):
                trajectory, _ = torchsens.forward_sensitivity(problem, rtol=1e-8, atol=1e-8, autojacvec=mode,
                                                              saveat=[3.])
                reference, _ = torchsens.forward_sensitivity(lotka_volterra(tspan=(0., 3.)), rtol=1e-8, atol=1e-8,
                                                             autojacvec=mode, saveat=[3.])
                self.assertTrue(torch.allclose(trajectory.us, reference.us, rtol=0, atol=1e-12))

    def test_explicit_provider(self):
        problem = lotka_volterra(tspan=(0., 1.))
        with_provider, _ = torchsens.forward_sensitivity(problem, autodiff=torchsens.ReverseAD())
        with_mode, _ = torchsens.forward_sensitivity(problem, autojacvec='reverse_ad')
        self.assertTrue(torch.equal(with_provider.us, with_mode.us))

    def test_reentrant(self):
        problem = lotka_volterra(tspan=(0., 3.))
        sequential, _ = torchsens.forward_sensitivity(problem, autojacvec='reverse_ad')
        parallel, _ = torchsens.forward_sensitivity(problem, autojacvec='reverse_ad', reentrant=True, max_workers=3)
        self.assertTrue(torch.allclose(sequential.us, parallel.us, rtol=0, atol=1e-12))

    def test_reentrant_forward_ad(self):
        problem = lotka_volterra(tspan=(0., 1.))
        sequential, _ = torchsens.forward_sensitivity(problem)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            parallel, _ = torchsens.forward_sensitivity(problem, reentrant=True, max_workers=3)
        self.assertTrue(any('one at a time' in str(w.message) for w in caught))
        self.assertTrue(torch.allclose(sequential.us, parallel.us, rtol=0, atol=1e-12))

    def test_invalid_mode(self):
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.forward_sensitivity(lotka_volterra(), autojacvec='symbolic')

    def test_user_jacobian_missing(self):
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.forward_sensitivity(lotka_volterra(), autojacvec='user_jacobian')

    def test_user_jacobian_shape(self):
        f = torchsens.ODEFunction(lambda u, p, t: -p[0] * u, jac=lambda u, p, t: -p[0] * torch.eye(2),
                                  paramjac=lambda u, p, t: torch.zeros(2, 3))
        problem = torchsens.ODEProblem(f, torch.ones(2), (0., 1.), torch.ones(1))
        with self.assertRaises(torchsens.ConfigurationError) as cm:
            torchsens.forward_sensitivity(problem, autojacvec='user_jacobian')
        self.assertEqual(cm.exception.component, 'user_jacobian')


class TestDegenerate(unittest.TestCase):

    def test_no_parameters(self):
        problem = torchsens.ODEProblem(lambda u, p, t: -u, torch.ones(2), (0., 1.))
        trajectory, extract = torchsens.forward_sensitivity(problem)
        plain = torchsens.solve(problem)
        self.assertEqual(trajectory.us.shape, plain.us.shape)
        self.assertTrue(torch.equal(trajectory.us, plain.us))
        u, dp = extract(trajectory, -1)
        self.assertEqual(dp, ())
        self.assertEqual(u.shape, (2,))

    def test_many_parameters(self):
        p = torch.zeros(101)
        problem = torchsens.ODEProblem(lambda u, p, t: -u + p.sum(), torch.ones(1), (0., 0.1), p)
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter('always')
            torchsens.forward_sensitivity(problem, autojacvec='reverse_ad', rtol=1e-4, atol=1e-4)
        self.assertTrue(any('adjoint' in str(w.message) for w in caught))


if __name__ == '__main__':
    unittest.main()
