"""
Matrix-free variable coefficient Poisson operator

Conservative variable coefficient Poisson equation on a structured grid of
dimension N:

    surface integral of beta * dx/dn = sigma

The discrete system is

    A x = [L + D + L^T] x = b

where A is symmetric, block-tridiagonal and extremely sparse. Only the lower
off-diagonal coefficients are stored: L has shape (*shape, N) and L[I, i]
couples cell I to its lower neighbour I - e_i. The diagonal follows from
conservation,

    D[I] = -sum_i (L[I, i] + L[I + e_i, i])

so the whole matrix is known from L alone.

To iteratively solve the system, the operator holds helper fields for 1/D,
the increment eps and the residual r = b - A x. A solution method estimates
eps ~ A^-1 r and then increments x += eps, r -= A eps.

Kernels act on raveled fields with the flat index conventions of
:mod:`pypoisson.mesh`.
"""

import logging

import numpy as np
import numpy.typing as npt
from numba import njit, prange

from pypoisson import mesh

logger = logging.getLogger(__name__)

# |D| below this marks a degenerate (solid) cell, which then never moves
DIAG_EPS = 1e-8

ORDERINGS = ("lexicographic", "red-black")

_SIG_DIAG = [
    "void(f4[::1], f4[::1], f4[::1], i8[::1], i8[::1])",
    "void(f8[::1], f8[::1], f8[::1], i8[::1], i8[::1])",
]
_SIG_MULT = [
    "void(f4[::1], f4[::1], f4[::1], f4[::1], i8[::1], i8[::1])",
    "void(f8[::1], f8[::1], f8[::1], f8[::1], i8[::1], i8[::1])",
]
_SIG_INCREMENT = [
    "void(f4[::1], f4[::1], f4[::1], f4[::1], f4[::1], i8[::1], i8[::1])",
    "void(f8[::1], f8[::1], f8[::1], f8[::1], f8[::1], i8[::1], i8[::1])",
]
_SIG_SEED = [
    "void(f4[::1], f4[::1], f4[::1], i8[::1])",
    "void(f8[::1], f8[::1], f8[::1], i8[::1])",
]
_SIG_SWEEP = [
    "void(f4[::1], f4[::1], f4[::1], f4[::1], i8[::1], i8[::1])",
    "void(f8[::1], f8[::1], f8[::1], f8[::1], i8[::1], i8[::1])",
]


# ============================== stencil helpers ==============================


@njit(inline="always")
def _diag(I, L, strides):
    ndim = strides.size
    s = 0.0
    for i in range(ndim):
        s -= L[I * ndim + i] + L[(I + strides[i]) * ndim + i]
    return s


@njit(inline="always")
def _mult_lower(I, L, x, strides):
    ndim = strides.size
    s = 0.0
    for i in range(ndim):
        s += x[I - strides[i]] * L[I * ndim + i]
    return s


@njit(inline="always")
def _mult_upper(I, L, x, strides):
    ndim = strides.size
    s = 0.0
    for i in range(ndim):
        J = I + strides[i]
        s += x[J] * L[J * ndim + i]
    return s


@njit(inline="always")
def _mult(I, L, D, x, strides):
    return x[I] * D[I] + _mult_lower(I, L, x, strides) + _mult_upper(I, L, x, strides)


# ============================== kernels ==============================


@njit(_SIG_DIAG, fastmath=True, cache=True, parallel=True)
def set_diag(
    D: npt.NDArray[np.float64],
    iD: npt.NDArray[np.float64],
    L: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    Diagonal and inverse diagonal from the lower coefficients

    D[I] = -sum_i (L[I, i] + L[I + e_i, i])
    iD[I] = 0 if |D[I]| < DIAG_EPS else 1 / D[I]

    Parameters
    ----------
    D : npt.NDArray[np.float64]
        Raveled diagonal field, overwritten on interior cells
    iD : npt.NDArray[np.float64]
        Raveled inverse diagonal field, overwritten on interior cells
    L : npt.NDArray[np.float64]
        Raveled lower coefficients of shape (*shape, N)
    inner : npt.NDArray[np.int64]
        Flat indices of the interior cells
    strides : npt.NDArray[np.int64]
        Flat offset of a unit step along each axis
    """
    for n in prange(inner.size):
        I = inner[n]
        D[I] = _diag(I, L, strides)
        iD[I] = 0.0 if abs(D[I]) < DIAG_EPS else 1.0 / D[I]


@njit(_SIG_MULT, fastmath=True, cache=True, parallel=True)
def multiply(
    b: npt.NDArray[np.float64],
    L: npt.NDArray[np.float64],
    D: npt.NDArray[np.float64],
    x: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    Matrix-vector product b = A x on interior cells

    b[I] = D[I] x[I] + sum_i x[I - e_i] L[I, i] + sum_i x[I + e_i] L[I + e_i, i]

    Halo cells of b are not written.
    """
    for n in prange(inner.size):
        I = inner[n]
        b[I] = _mult(I, L, D, x, strides)


@njit(_SIG_MULT, fastmath=True, cache=True, parallel=True)
def residual(
    r: npt.NDArray[np.float64],
    L: npt.NDArray[np.float64],
    D: npt.NDArray[np.float64],
    x: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    Residual r = b - A x on interior cells

    Parameters
    ----------
    r : npt.NDArray[np.float64]
        Raveled residual field. On entry holds b, on exit b - A x
    L : npt.NDArray[np.float64]
        Raveled lower coefficients
    D : npt.NDArray[np.float64]
        Raveled diagonal
    x : npt.NDArray[np.float64]
        Raveled solution estimate
    inner : npt.NDArray[np.int64]
        Flat indices of the interior cells
    strides : npt.NDArray[np.int64]
        Flat offset of a unit step along each axis
    """
    for n in prange(inner.size):
        I = inner[n]
        r[I] = r[I] - _mult(I, L, D, x, strides)


@njit(_SIG_INCREMENT, fastmath=True, cache=True, parallel=True)
def increment(
    x: npt.NDArray[np.float64],
    r: npt.NDArray[np.float64],
    eps: npt.NDArray[np.float64],
    L: npt.NDArray[np.float64],
    D: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    Fold an increment into the solution and the residual

    x += eps and r -= A eps, cell by cell in a single pass. eps is only read,
    so cells are independent and r stays equal to b - A x.
    """
    for n in prange(inner.size):
        I = inner[n]
        x[I] = x[I] + eps[I]
        r[I] = r[I] - _mult(I, L, D, eps, strides)


@njit(_SIG_SEED, fastmath=True, cache=True, parallel=True)
def jacobi(
    eps: npt.NDArray[np.float64],
    r: npt.NDArray[np.float64],
    iD: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
) -> None:
    """Jacobi step eps = r / D, with degenerate cells held at zero"""
    for n in prange(inner.size):
        I = inner[n]
        eps[I] = r[I] * iD[I]


@njit(_SIG_SWEEP, fastmath=True, cache=True)
def gauss_seidel(
    eps: npt.NDArray[np.float64],
    r: npt.NDArray[np.float64],
    iD: npt.NDArray[np.float64],
    L: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    One in-place Gauss-Seidel sweep for A eps = r

    eps[I] = iD[I] * (r[I] - lower(eps) - upper(eps))

    Cells are visited sequentially in the order of inner, and each update
    reads neighbours already updated earlier in the same sweep. Must not run
    in parallel.

    Parameters
    ----------
    eps : npt.NDArray[np.float64]
        Raveled increment field, updated in place
    r : npt.NDArray[np.float64]
        Raveled residual field
    iD : npt.NDArray[np.float64]
        Raveled inverse diagonal
    L : npt.NDArray[np.float64]
        Raveled lower coefficients
    inner : npt.NDArray[np.int64]
        Flat indices of the cells to sweep, in traversal order
    strides : npt.NDArray[np.int64]
        Flat offset of a unit step along each axis
    """
    for n in range(inner.size):
        I = inner[n]
        eps[I] = iD[I] * (
            r[I] - _mult_lower(I, L, eps, strides) - _mult_upper(I, L, eps, strides)
        )


@njit(_SIG_SWEEP, fastmath=True, cache=True, parallel=True)
def gauss_seidel_color(
    eps: npt.NDArray[np.float64],
    r: npt.NDArray[np.float64],
    iD: npt.NDArray[np.float64],
    L: npt.NDArray[np.float64],
    cells: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    Gauss-Seidel update of a single red-black colour

    Cells of one colour only couple to cells of the other colour, so the
    update is safe to run in parallel. Not bit-identical to the
    lexicographic sweep.
    """
    for n in prange(cells.size):
        I = cells[n]
        eps[I] = iD[I] * (
            r[I] - _mult_lower(I, L, eps, strides) - _mult_upper(I, L, eps, strides)
        )


# ============================== operator ==============================


def _as_field(a: npt.NDArray, dtype=None) -> npt.NDArray:
    a = np.asarray(a)
    if dtype is None:
        dtype = a.dtype if a.dtype in (np.float32, np.float64) else np.float64
    return np.ascontiguousarray(a, dtype=dtype)


class PoissonOperator:
    """
    Implicit Poisson matrix with relaxation helpers

    Parameters
    ----------
    x : npt.NDArray[np.float64]
        Initial solution with one halo layer per axis. Adopted as the
        solution buffer and mutated in place when it is already a
        C-contiguous float32/float64 array, copied otherwise
    L : npt.NDArray[np.float64]
        Lower coefficients of shape (*x.shape, x.ndim)
    ordering : str
        Gauss-Seidel traversal, "lexicographic" (sequential) or "red-black"
        (parallel within each colour)

    Raises
    ------
    ValueError
        If L does not match x or the ordering is unknown

    Examples
    --------
    >>> import numpy as np
    >>> from pypoisson.poisson import PoissonOperator
    >>> x = np.zeros((10, 10))
    >>> L = np.ones((10, 10, 2))
    >>> p = PoissonOperator(x, L)
    >>> float(p.D[5, 5])
    -4.0
    """

    def __init__(self, x: npt.NDArray, L: npt.NDArray, ordering: str = "lexicographic"):
        if ordering not in ORDERINGS:
            raise ValueError(f"ordering must be one of {ORDERINGS}, got {ordering!r}")
        self.x = _as_field(x)
        shape = mesh.check_shape(self.x.shape)
        L = np.asarray(L)
        expected = shape + (len(shape),)
        if L.shape != expected:
            raise ValueError(f"L has shape {L.shape}, expected {expected}")

        self.ordering = ordering
        self.L = _as_field(L, self.x.dtype).copy()
        self.D = np.zeros_like(self.x)
        self.iD = np.zeros_like(self.x)
        self.eps = np.zeros_like(self.x)
        self.r = np.zeros_like(self.x)
        self.iterations = []

        self._inside = mesh.inside(shape)
        self._inner = mesh.interior_indices(shape)
        self._colors = mesh.color_indices(shape)
        self._strides = mesh.axis_strides(shape)
        self.set_diag()

    @property
    def shape(self):
        return self.x.shape

    @property
    def ndim(self) -> int:
        return self.x.ndim

    def _check(self, a: npt.NDArray, name: str) -> npt.NDArray:
        if np.shape(a) != self.shape:
            raise ValueError(f"{name} has shape {np.shape(a)}, expected {self.shape}")
        return _as_field(a, self.x.dtype)

    def set_diag(self) -> None:
        """Re-derive D and 1/D from the current coefficients"""
        set_diag(
            self.D.ravel(), self.iD.ravel(), self.L.ravel(), self._inner, self._strides
        )
        if logger.isEnabledFor(logging.DEBUG):
            frozen = np.count_nonzero(self.iD[self._inside] == 0)
            logger.debug("Diagonal set, %d degenerate cells frozen", frozen)

    def update(self, L: npt.NDArray) -> None:
        """
        Replace the coefficients and re-derive the diagonal

        The solution, increment and residual buffers are kept, so the next
        solve is warm-started from the current x.

        Parameters
        ----------
        L : npt.NDArray[np.float64]
            New lower coefficients of shape (*x.shape, x.ndim)
        """
        expected = self.shape + (self.ndim,)
        if np.shape(L) != expected:
            raise ValueError(f"L has shape {np.shape(L)}, expected {expected}")
        self.L[...] = L
        self.set_diag()

    def multiply(self, x: npt.NDArray) -> npt.NDArray:
        """
        Matrix-vector product

        Parameters
        ----------
        x : npt.NDArray[np.float64]
            Field with the shape of the solution

        Returns
        -------
        npt.NDArray[np.float64]
            b = A x, zero in the halo cells
        """
        x = self._check(x, "x")
        b = np.zeros_like(self.x)
        multiply(
            b.ravel(), self.L.ravel(), self.D.ravel(), x.ravel(), self._inner, self._strides
        )
        return b

    def residual(self, b: npt.NDArray) -> None:
        """Recompute r = b - A x from scratch"""
        b = self._check(b, "b")
        self.r[self._inside] = b[self._inside]
        residual(
            self.r.ravel(),
            self.L.ravel(),
            self.D.ravel(),
            self.x.ravel(),
            self._inner,
            self._strides,
        )

    def increment(self) -> None:
        """Apply x += eps and r -= A eps"""
        increment(
            self.x.ravel(),
            self.r.ravel(),
            self.eps.ravel(),
            self.L.ravel(),
            self.D.ravel(),
            self._inner,
            self._strides,
        )

    def jacobi(self, r: npt.NDArray) -> npt.NDArray:
        """
        Diagonal (Jacobi) preconditioner

        Parameters
        ----------
        r : npt.NDArray[np.float64]
            Residual field with the shape of the solution

        Returns
        -------
        npt.NDArray[np.float64]
            r / D on interior cells, zero on degenerate and halo cells
        """
        r = self._check(r, "r")
        z = np.zeros_like(self.x)
        jacobi(z.ravel(), r.ravel(), self.iD.ravel(), self._inner)
        return z

    def smooth(self, n_smoothing: int = 0) -> None:
        """
        Diagonally preconditioned relaxation of the current residual

        Seeds eps with a Jacobi step, runs n_smoothing Gauss-Seidel sweeps on
        A eps = r and folds eps into x and r. With n_smoothing=0 this is a
        plain Jacobi iteration.

        Parameters
        ----------
        n_smoothing : int
            Number of Gauss-Seidel sweeps after the Jacobi seed
        """
        eps = self.eps.ravel()
        r = self.r.ravel()
        iD = self.iD.ravel()
        L = self.L.ravel()
        jacobi(eps, r, iD, self._inner)
        for _ in range(n_smoothing):
            if self.ordering == "red-black":
                for cells in self._colors:
                    gauss_seidel_color(eps, r, iD, L, cells, self._strides)
            else:
                gauss_seidel(eps, r, iD, L, self._inner, self._strides)
        self.increment()

    def residual_norm(self) -> float:
        """L2 norm of the maintained residual"""
        return float(mesh.l2_norm(self.r.ravel(), self._inner))

    def __repr__(self) -> str:
        return (
            f"PoissonOperator(shape={self.shape}, dtype={self.x.dtype}, "
            f"ordering={self.ordering!r}, solves={len(self.iterations)})"
        )
