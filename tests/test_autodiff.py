import unittest
import torch
import torchsens


def fn(x):
    return torch.stack([x[0] * x[1], torch.sin(x[2]) + x[0] ** 2])


def jacobian(x):
    return torch.tensor([[x[1], x[0], 0.],
                         [2 * x[0], 0., torch.cos(x[2])]])


class TestProviders(unittest.TestCase):

    def setUp(self):
        self.x = torch.tensor([0.3, -1.2, 0.7])
        self.J = jacobian(self.x)

    def test_products(self):
        v = torch.tensor([1., 2., -0.5])
        w = torch.tensor([0.4, -3.])
        for mode in ('forward_ad', 'reverse_ad', 'finite_diff'):
            provider = torchsens.make_provider(mode)
            eps = 1e-8 if mode == 'finite_diff' else 1e-12
            with self.subTest(mode=mode):
                self.assertTrue(torch.allclose(provider.jvp(fn, self.x, v), self.J.matmul(v), rtol=0, atol=eps))
                self.assertTrue(torch.allclose(provider.vjp(fn, self.x, w), w.matmul(self.J), rtol=0, atol=eps))

    def test_user_jacobian(self):
        class WithJacobian(object):
            def __call__(self, x):
                return fn(x)

            def jacobian(self, x):
                return jacobian(x)

        provider = torchsens.UserJacobian()
        v = torch.tensor([1., 0., 1.])
        w = torch.tensor([1., 1.])
        self.assertTrue(torch.equal(provider.jvp(WithJacobian(), self.x, v), self.J.matmul(v)))
        self.assertTrue(torch.equal(provider.vjp(WithJacobian(), self.x, w), w.matmul(self.J)))
        # Functions without a Jacobian fall back to reverse mode.
        self.assertTrue(torch.allclose(provider.vjp(fn, self.x, w), w.matmul(self.J), rtol=0, atol=1e-12))

    def test_independent_of_input(self):
        constant = lambda x: torch.ones(2)
        v = torch.ones(3)
        for mode in ('forward_ad', 'reverse_ad', 'finite_diff'):
            provider = torchsens.make_provider(mode)
            with self.subTest(mode=mode):
                self.assertTrue(torch.equal(provider.vjp(constant, self.x, torch.ones(2)), torch.zeros(3)))
                self.assertTrue(torch.equal(provider.jvp(constant, self.x, v), torch.zeros(2)))

    def test_invalid_mode(self):
        with self.assertRaises(torchsens.ConfigurationError):
            torchsens.make_provider('symbolic')


if __name__ == '__main__':
    unittest.main()
