"""
Structured grid helpers

Fields are C-contiguous arrays with one layer of halo cells along every axis.
Kernels work on the raveled field: a cell is a flat index I and its
neighbours along axis i are I - strides[i] and I + strides[i]. Halo cells
absorb the +-1 excursions, so kernels never bounds-check.

A staggered (face) field with one component per axis has shape (*shape, N)
and component i of cell I lives at flat index I*N + i.
"""

from typing import Tuple

import numpy as np
import numpy.typing as npt
from numba import njit, prange


def check_shape(shape: Tuple[int, ...]) -> Tuple[int, ...]:
    """
    Validate a halo-padded grid shape

    Parameters
    ----------
    shape : Tuple[int, ...]
        Grid shape including halo cells

    Returns
    -------
    Tuple[int, ...]
        Shape as a tuple of ints

    Raises
    ------
    ValueError
        If the grid has no axes or an axis has no interior cell
    """
    shape = tuple(int(n) for n in shape)
    if len(shape) == 0:
        raise ValueError("grid must have at least one axis")
    if min(shape) < 3:
        raise ValueError(
            f"grid shape {shape} has no interior cells, every axis needs length >= 3"
        )
    return shape


def inside(shape: Tuple[int, ...]) -> Tuple[slice, ...]:
    """Slices selecting the interior (non-halo) cells"""
    return tuple(slice(1, n - 1) for n in check_shape(shape))


def interior_indices(shape: Tuple[int, ...]) -> npt.NDArray[np.int64]:
    """
    Flat indices of the interior cells in lexicographic (row-major) order

    Sequential kernels visit cells in exactly this order.

    Examples
    --------
    >>> from pypoisson.mesh import interior_indices
    >>> interior_indices((3, 4))
    array([5, 6])
    """
    shape = check_shape(shape)
    flat = np.arange(np.prod(shape), dtype=np.int64).reshape(shape)
    return np.ascontiguousarray(flat[inside(shape)].ravel())


def color_indices(
    shape: Tuple[int, ...]
) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]:
    """
    Interior flat indices split by red-black colour

    A cell is red when the sum of its multi-index is even. Neighbours along
    any axis always have opposite colours.

    Parameters
    ----------
    shape : Tuple[int, ...]
        Grid shape including halo cells

    Returns
    -------
    Tuple[npt.NDArray[np.int64], npt.NDArray[np.int64]]
        Red and black flat indices, each in lexicographic order
    """
    shape = check_shape(shape)
    parity = np.indices(shape).sum(axis=0) % 2
    flat = np.arange(np.prod(shape), dtype=np.int64).reshape(shape)
    inner = inside(shape)
    cells = flat[inner].ravel()
    colors = parity[inner].ravel()
    return (
        np.ascontiguousarray(cells[colors == 0]),
        np.ascontiguousarray(cells[colors == 1]),
    )


def axis_strides(shape: Tuple[int, ...]) -> npt.NDArray[np.int64]:
    """
    Flat offset of a unit step along each axis

    Examples
    --------
    >>> from pypoisson.mesh import axis_strides
    >>> axis_strides((4, 5, 6))
    array([30,  6,  1])
    """
    shape = check_shape(shape)
    return np.array(
        [np.prod(shape[i + 1 :], dtype=np.int64) for i in range(len(shape))],
        dtype=np.int64,
    )


@njit(
    ["f8(f4[::1], i8[::1])", "f8(f8[::1], i8[::1])"],
    fastmath=True,
    cache=True,
    parallel=True,
)
def l2_norm(a: npt.NDArray[np.float64], inner: npt.NDArray[np.int64]) -> np.float64:
    """
    L2 norm over interior cells

    norm = sqrt[sum(a**2)] over the cells listed in inner

    Parameters
    ----------
    a : npt.NDArray[np.float64]
        Raveled field
    inner : npt.NDArray[np.int64]
        Flat indices of the interior cells

    Returns
    -------
    np.float64
        L2 norm

    Examples
    --------
    >>> import numpy as np
    >>> from pypoisson.mesh import interior_indices, l2_norm
    >>> a = np.zeros((4, 4))
    >>> a[1:-1, 1:-1] = 1.0
    >>> l2_norm(a.ravel(), interior_indices(a.shape))
    2.0
    """
    result = 0.0
    for n in prange(inner.size):
        value = a[inner[n]]
        result += value * value
    return np.sqrt(result)


@njit(
    [
        "void(f4[::1], f4[::1], i8[::1], i8[::1])",
        "void(f8[::1], f8[::1], i8[::1], i8[::1])",
    ],
    fastmath=True,
    cache=True,
    parallel=True,
)
def divergence(
    sigma: npt.NDArray[np.float64],
    u: npt.NDArray[np.float64],
    inner: npt.NDArray[np.int64],
    strides: npt.NDArray[np.int64],
) -> None:
    """
    Divergence of a staggered vector field

    sigma[I] = sum_i (u[I+e_i, i] - u[I, i]) on interior cells, where u[I, i]
    is the flux through the lower face of cell I along axis i.

    Parameters
    ----------
    sigma : npt.NDArray[np.float64]
        Raveled output scalar field, halo cells are left untouched
    u : npt.NDArray[np.float64]
        Raveled face field of shape (*shape, N)
    inner : npt.NDArray[np.int64]
        Flat indices of the interior cells
    strides : npt.NDArray[np.int64]
        Flat offset of a unit step along each axis
    """
    ndim = strides.size
    for n in prange(inner.size):
        I = inner[n]
        s = 0.0
        for i in range(ndim):
            s += u[(I + strides[i]) * ndim + i] - u[I * ndim + i]
        sigma[I] = s
