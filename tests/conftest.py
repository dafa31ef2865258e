import numpy as np
import pytest


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def coefficients(rng):
    """Random positive lower coefficients, halo included"""

    def make(shape, low=0.5, high=1.5):
        return rng.uniform(low, high, size=tuple(shape) + (len(shape),))

    return make


@pytest.fixture
def field(rng):
    """Random field with a constant halo"""

    def make(shape, halo=0.0):
        x = np.full(shape, halo)
        inner = tuple(slice(1, n - 1) for n in shape)
        x[inner] = rng.standard_normal(x[inner].shape)
        return x

    return make


@pytest.fixture
def laplacian():
    """Unit coefficient Laplacian on a 16x16 node grid with a Dirichlet halo"""
    n = 16
    shape = (n + 2, n + 2)
    return shape, np.ones(shape + (2,))
