import unittest
import torch
import torchsens

from problems import LinearODE, lotka_volterra


def max_error(true, estimate):
    return (true - estimate).abs().max()


class TestCheckpointManager(unittest.TestCase):

    def test_dense(self):
        trajectory = torchsens.solve(lotka_volterra(), rtol=1e-10, atol=1e-10)
        manager = torchsens.CheckpointManager(trajectory)
        self.assertEqual(manager.points, [0., 10.])
        for t in (0., 1.3, 4.2, 10.):
            self.assertTrue(torch.equal(manager(t), trajectory(t)))
        self.assertEqual(manager.reintegrations, 0)

    def test_dense_requires_interpolant(self):
        trajectory = torchsens.solve(lotka_volterra(), saveat=[5.], dense=False)
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.CheckpointManager(trajectory)

    def test_checkpointed_matches_dense(self):
        trajectory = torchsens.solve(lotka_volterra(), rtol=1e-10, atol=1e-10)
        manager = torchsens.CheckpointManager(trajectory, [0., 2., 5., 8., 10.], enabled=True)
        self.assertEqual(manager.points, [0., 2., 5., 8., 10.])
        for t in (9.5, 7.1, 6.3, 4.9, 3.3, 1.2, 0.4):
            self.assertLess(max_error(trajectory(t), manager(t)), 1e-7)

    def test_checkpoint_states(self):
        ode = LinearODE()
        trajectory = torchsens.solve(ode.problem, rtol=1e-10, atol=1e-10, saveat=[0.5])
        manager = torchsens.CheckpointManager(trajectory, 'auto', enabled=True)
        self.assertEqual(manager.points, [0., 0.5, 1.])
        self.assertTrue(torch.equal(manager.state_at_checkpoint(0.5), trajectory[1]))
        self.assertIsNone(manager.state_at_checkpoint(0.25))
        self.assertLess(max_error(ode.u_exact(0.25), manager(0.25)), 1e-8)
        self.assertLess(max_error(ode.u_exact(0.75), manager(0.75)), 1e-8)

    def test_sparse_trajectory(self):
        ode = LinearODE()
        trajectory = torchsens.solve(ode.problem, rtol=1e-10, atol=1e-10, saveat=[0.5], dense=False)
        # Checkpoints between samples are recomputed from the last sample.
        manager = torchsens.CheckpointManager(trajectory, [0.3, 0.6], enabled=True)
        self.assertEqual(manager.points, [0., 0.3, 0.6, 1.])
        self.assertLess(max_error(ode.u_exact(0.6), manager.state_at_checkpoint(0.6)), 1e-8)
        self.assertLess(max_error(ode.u_exact(0.45), manager(0.45)), 1e-8)

    def test_bracket_cache(self):
        trajectory = torchsens.solve(lotka_volterra(), rtol=1e-8, atol=1e-8)
        manager = torchsens.CheckpointManager(trajectory, [0., 2., 5., 8., 10.], enabled=True)
        # A backward sweep through the brackets re-integrates each of them exactly once.
        for t in [10. - 0.25 * i for i in range(41)]:
            manager(t)
        self.assertEqual(manager.reintegrations, 4)
        self.assertLessEqual(len(manager._cache), manager.max_cached_brackets)
        manager(9.)
        self.assertEqual(manager.reintegrations, 5)
        manager.clear()
        manager(1.)
        self.assertEqual(manager.reintegrations, 6)

    def test_empty_times(self):
        trajectory = torchsens.solve(lotka_volterra(), saveat=[2.5, 5.])
        manager = torchsens.CheckpointManager(trajectory, [], enabled=True)
        self.assertEqual(manager.points, [0., 2.5, 5., 10.])

    def test_invalid_times(self):
        trajectory = torchsens.solve(lotka_volterra())
        for times in ([0., 11.], [-1., 5.], [5., 2.], [2., 2.], 'every'):
            with self.subTest(times=times):
                with self.assertRaises(torchsens.ConfigurationError):
                    torchsens.CheckpointManager(trajectory, times, enabled=True)

    def test_out_of_span(self):
        trajectory = torchsens.solve(lotka_volterra())
        manager = torchsens.CheckpointManager(trajectory, [5.], enabled=True)
        with self.assertRaises(torchsens.ConfigurationError):
            manager(10.5)


if __name__ == '__main__':
    unittest.main()
