import math
import unittest
import torch
import torchsens


class TestGaussLegendre(unittest.TestCase):

    def test_polynomial_exact(self):
        # An n-point rule integrates polynomials of degree 2n - 1 exactly.
        for order in (2, 4, 7):
            degree = 2 * order - 1
            with self.subTest(order=order):
                integral = torchsens.gauss_legendre(lambda t: torch.tensor(t ** degree), 0., 2., order)
                self.assertAlmostEqual(float(integral), 2. ** (degree + 1) / (degree + 1), places=8)

    def test_vector_valued(self):
        integral = torchsens.gauss_legendre(lambda t: torch.tensor([1., t, math.cos(t)]), 0., 1.)
        self.assertTrue(torch.allclose(integral, torch.tensor([1., 0.5, math.sin(1.)]), rtol=0, atol=1e-12))

    def test_adaptive(self):
        integrand = lambda t: torch.tensor([math.exp(-50 * t), math.sqrt(1 + t)])
        integral = torchsens.adaptive_gauss_legendre(integrand, 0., 1., atol=1e-10, rtol=1e-10)
        expected = torch.tensor([(1 - math.exp(-50.)) / 50, 2. / 3 * (2 ** 1.5 - 1)])
        self.assertTrue(torch.allclose(integral, expected, rtol=0, atol=1e-9))

    def test_empty_interval(self):
        integral = torchsens.adaptive_gauss_legendre(lambda t: torch.ones(3), 1., 1., atol=1e-8, rtol=1e-8)
        self.assertTrue(torch.equal(integral, torch.zeros(3)))

    def test_no_convergence(self):
        integrand = lambda t: torch.tensor([math.copysign(1., math.sin(1000 * t))])
        with self.assertRaises(torchsens.NumericalDivergenceError) as cm:
            torchsens.adaptive_gauss_legendre(integrand, 0., 1., atol=1e-14, rtol=0., max_depth=3)
        self.assertEqual(cm.exception.component, 'quadrature')


if __name__ == '__main__':
    unittest.main()
