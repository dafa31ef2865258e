import numpy as np
import pytest

from pypoisson.poisson import PoissonOperator


def explicit_multiply(L, x):
    """Reference A x with plain multi-index loops"""
    ndim = x.ndim
    b = np.zeros_like(x)
    for I in np.ndindex(*(n - 2 for n in x.shape)):
        I = tuple(i + 1 for i in I)
        diag = 0.0
        s = 0.0
        for i in range(ndim):
            lo = tuple(c - (j == i) for j, c in enumerate(I))
            hi = tuple(c + (j == i) for j, c in enumerate(I))
            diag -= L[I + (i,)] + L[hi + (i,)]
            s += x[lo] * L[I + (i,)] + x[hi] * L[hi + (i,)]
        b[I] = diag * x[I] + s
    return b


def test_construction_shape_mismatch(coefficients):
    x = np.zeros((6, 7))
    with pytest.raises(ValueError):
        PoissonOperator(x, coefficients((6, 6)))
    with pytest.raises(ValueError):
        PoissonOperator(x, np.ones((6, 7, 3)))
    with pytest.raises(ValueError):
        PoissonOperator(x, np.ones((6, 7)))


def test_construction_rejects_unknown_ordering(coefficients):
    with pytest.raises(ValueError):
        PoissonOperator(np.zeros((5, 5)), coefficients((5, 5)), ordering="spiral")


def test_solution_buffer_is_adopted(coefficients):
    x = np.zeros((5, 6))
    p = PoissonOperator(x, coefficients((5, 6)))
    assert p.x is x
    assert p.iterations == []


@pytest.mark.parametrize("shape", [(9,), (6, 7), (5, 6, 4)])
def test_diagonal_conservation(coefficients, shape):
    L = coefficients(shape)
    p = PoissonOperator(np.zeros(shape), L)
    inner = tuple(slice(1, n - 1) for n in shape)
    total = p.D.copy()
    for i in range(len(shape)):
        upper = tuple(slice(2, n) if j == i else slice(1, n - 1) for j, n in enumerate(shape))
        total[inner] += L[inner + (i,)] + L[upper + (i,)]
    np.testing.assert_allclose(total[inner], 0.0, atol=1e-12)
    np.testing.assert_allclose(p.iD[inner], 1.0 / p.D[inner])


def test_laplacian_diagonal(laplacian):
    shape, L = laplacian
    p = PoissonOperator(np.zeros(shape), L)
    np.testing.assert_array_equal(p.D[1:-1, 1:-1], -4.0)
    np.testing.assert_array_equal(p.iD[1:-1, 1:-1], -0.25)
    assert np.all(p.D[0] == 0)


def test_degenerate_diagonal_inverse_is_zero():
    L = np.array([0.0, 1e-9, 1e-9, 1.0, 1.0]).reshape(5, 1)
    p = PoissonOperator(np.zeros(5), L)
    assert p.D[1] == pytest.approx(-2e-9)
    assert p.iD[1] == 0.0
    assert p.iD[2] == pytest.approx(1.0 / p.D[2])
    assert p.iD[3] == pytest.approx(-0.5)


def test_set_diag_is_idempotent(coefficients):
    shape = (7, 8, 5)
    p = PoissonOperator(np.zeros(shape), coefficients(shape))
    D, iD = p.D.copy(), p.iD.copy()
    p.set_diag()
    p.set_diag()
    np.testing.assert_array_equal(p.D, D)
    np.testing.assert_array_equal(p.iD, iD)


@pytest.mark.parametrize("shape", [(8,), (6, 7), (5, 6, 4)])
def test_multiply_matches_explicit_stencil(coefficients, field, shape):
    L = coefficients(shape)
    x = field(shape, halo=0.3)
    p = PoissonOperator(np.zeros(shape), L)
    np.testing.assert_allclose(p.multiply(x), explicit_multiply(L, x), atol=1e-12)


def test_multiply_zero_halo(coefficients, field):
    shape = (6, 6, 6)
    p = PoissonOperator(np.zeros(shape), coefficients(shape))
    b = p.multiply(field(shape, halo=1.0))
    halo = np.ones(shape, dtype=bool)
    halo[1:-1, 1:-1, 1:-1] = False
    assert np.all(b[halo] == 0)


def test_multiply_linearity(coefficients, field):
    shape = (9, 10)
    p = PoissonOperator(np.zeros(shape), coefficients(shape))
    x1, x2 = field(shape), field(shape)
    a, c = 1.7, -0.4
    np.testing.assert_allclose(
        p.multiply(a * x1 + c * x2),
        a * p.multiply(x1) + c * p.multiply(x2),
        atol=1e-12,
    )


@pytest.mark.parametrize("shape", [(12,), (9, 10), (6, 5, 7)])
def test_multiply_symmetry(coefficients, field, shape):
    p = PoissonOperator(np.zeros(shape), coefficients(shape))
    x, y = field(shape), field(shape)
    xAy = np.sum(x * p.multiply(y))
    assert np.sum(p.multiply(x) * y) == pytest.approx(xAy, rel=1e-10, abs=1e-10)


def test_multiply_shape_mismatch(coefficients):
    p = PoissonOperator(np.zeros((6, 6)), coefficients((6, 6)))
    with pytest.raises(ValueError):
        p.multiply(np.zeros((6, 7)))
    with pytest.raises(ValueError):
        p.residual(np.zeros(36))


def test_residual_from_scratch(coefficients, field):
    shape = (7, 9)
    x = field(shape)
    b = field(shape)
    p = PoissonOperator(x, coefficients(shape))
    p.residual(b)
    expected = b - p.multiply(x)
    np.testing.assert_allclose(p.r[1:-1, 1:-1], expected[1:-1, 1:-1], atol=1e-12)
    assert np.all(p.r[0] == 0)


@pytest.mark.parametrize("ordering", ["lexicographic", "red-black"])
@pytest.mark.parametrize("n_smoothing", [0, 1, 3])
def test_incremental_residual_consistency(coefficients, field, ordering, n_smoothing):
    shape = (8, 7, 6)
    b = field(shape)
    p = PoissonOperator(field(shape, halo=0.2), coefficients(shape), ordering=ordering)
    p.residual(b)
    for _ in range(4):
        p.smooth(n_smoothing)
    inner = (slice(1, -1),) * 3
    expected = b - p.multiply(p.x)
    np.testing.assert_allclose(p.r[inner], expected[inner], atol=1e-10)


def test_smoothing_reduces_residual(coefficients, field):
    shape = (10, 10)
    p = PoissonOperator(np.zeros(shape), coefficients(shape))
    p.residual(field(shape))
    r0 = p.residual_norm()
    p.smooth(5)
    r1 = p.residual_norm()
    p.smooth(5)
    assert r1 < r0
    assert p.residual_norm() < r0


def test_zero_sweeps_is_jacobi(coefficients, field):
    shape = (6, 8)
    p = PoissonOperator(np.zeros(shape), coefficients(shape))
    b = field(shape)
    p.residual(b)
    z = p.jacobi(p.r)
    p.smooth(0)
    np.testing.assert_allclose(p.x, z)
    np.testing.assert_allclose(z[1:-1, 1:-1], b[1:-1, 1:-1] / p.D[1:-1, 1:-1])


def test_gauss_seidel_beats_jacobi(coefficients, field):
    shape = (12, 12)
    L = coefficients(shape)
    b = field(shape)
    norms = []
    for n_smoothing in (0, 4):
        p = PoissonOperator(np.zeros(shape), L)
        p.residual(b)
        p.smooth(n_smoothing)
        norms.append(p.residual_norm())
    assert norms[1] < norms[0]


def reference_sweeps(L, r, iD, n_smoothing, ordering="lexicographic"):
    """Jacobi seed then in-place Gauss-Seidel sweeps with multi-index loops"""
    ndim = r.ndim
    cells = [
        tuple(i + 1 for i in I) for I in np.ndindex(*(n - 2 for n in r.shape))
    ]
    if ordering == "red-black":
        cells = [I for I in cells if sum(I) % 2 == 0] + [
            I for I in cells if sum(I) % 2 == 1
        ]
    eps = np.zeros_like(r)
    for I in cells:
        eps[I] = r[I] * iD[I]
    for _ in range(n_smoothing):
        for I in cells:
            s = 0.0
            for i in range(ndim):
                lo = tuple(c - (j == i) for j, c in enumerate(I))
                hi = tuple(c + (j == i) for j, c in enumerate(I))
                s += eps[lo] * L[I + (i,)] + eps[hi] * L[hi + (i,)]
            eps[I] = iD[I] * (r[I] - s)
    return eps


@pytest.mark.parametrize("ordering", ["lexicographic", "red-black"])
@pytest.mark.parametrize("n_smoothing", [1, 2])
def test_sweeps_follow_traversal_order(coefficients, field, ordering, n_smoothing):
    shape = (6, 7, 5)
    L = coefficients(shape)
    p = PoissonOperator(np.zeros(shape), L, ordering=ordering)
    p.residual(field(shape))
    r0 = p.r.copy()
    p.smooth(n_smoothing)
    expected = reference_sweeps(L, r0, p.iD, n_smoothing, ordering)
    np.testing.assert_allclose(p.eps, expected, atol=1e-12)
    np.testing.assert_allclose(p.x, expected, atol=1e-12)


def test_red_black_differs_from_lexicographic(coefficients, field):
    shape = (6, 7, 5)
    L = coefficients(shape)
    b = field(shape)
    eps = {}
    for ordering in ("lexicographic", "red-black"):
        p = PoissonOperator(np.zeros(shape), L, ordering=ordering)
        p.residual(b)
        p.smooth(2)
        eps[ordering] = p.eps.copy()
    assert not np.allclose(eps["lexicographic"], eps["red-black"], atol=1e-6)


def test_update_keeps_solution(coefficients, field):
    shape = (6, 7)
    x = field(shape)
    p = PoissonOperator(x, coefficients(shape))
    x0 = x.copy()
    L = coefficients(shape, low=2.0, high=3.0)
    p.update(L)
    assert p.x is x
    np.testing.assert_array_equal(p.x, x0)
    np.testing.assert_array_equal(p.L, L)
    fresh = PoissonOperator(np.zeros(shape), L)
    np.testing.assert_array_equal(p.D, fresh.D)
    np.testing.assert_array_equal(p.iD, fresh.iD)


def test_update_shape_mismatch(coefficients):
    p = PoissonOperator(np.zeros((6, 6)), coefficients((6, 6)))
    with pytest.raises(ValueError):
        p.update(coefficients((6, 7)))


def test_float32_fields(coefficients, field):
    shape = (8, 8)
    x = np.zeros(shape, dtype=np.float32)
    p = PoissonOperator(x, coefficients(shape))
    assert p.x is x
    assert p.L.dtype == np.float32 and p.D.dtype == np.float32
    p.residual(field(shape))
    r0 = p.residual_norm()
    p.smooth(2)
    assert p.residual_norm() < r0
