"""
Iterative solver for the Poisson matrix equation
"""

import logging
from typing import List, Optional

import numpy as np
import numpy.typing as npt

from pypoisson.poisson import PoissonOperator

logger = logging.getLogger(__name__)


def solver(
    p: PoissonOperator,
    b: npt.NDArray[np.float64],
    log: bool = False,
    tol: float = 1e-4,
    itmx: int = 1000,
    n_smoothing: int = 5,
) -> Optional[List[float]]:
    """
    Approximate iterative solution of A x = b

    The solution p.x is mutated in place and serves as the initial guess, so
    repeated calls are warm-started. The residual is computed from scratch
    once, then maintained incrementally by the smoother. The number of
    smoothing rounds is appended to p.iterations.

    Hitting itmx is not an error: check the returned history or
    p.iterations to detect non-convergence.

    Parameters
    ----------
    p : PoissonOperator
        Poisson matrix holding the solution estimate
    b : npt.NDArray[np.float64]
        Right-hand side with the shape of p.x
    log : bool
        If True, return the L2 norm of the residual before the first and
        after each iteration
    tol : float
        Convergence tolerance on the L2 norm of the residual
    itmx : int
        Maximum number of iterations
    n_smoothing : int
        Gauss-Seidel sweeps per iteration

    Returns
    -------
    Optional[List[float]]
        Residual history if log is True, None otherwise

    Raises
    ------
    ValueError
        If b does not have the shape of p.x

    Examples
    --------
    >>> import numpy as np
    >>> from pypoisson.poisson import PoissonOperator
    >>> from pypoisson.solver import solver
    >>> p = PoissonOperator(np.zeros((18, 18)), np.ones((18, 18, 2)))
    >>> b = np.zeros((18, 18))
    >>> b[1:-1, 1:-1] = 1e-3
    >>> res = solver(p, b, log=True)
    >>> res[-1] <= 1e-4
    True
    """
    if np.shape(b) != p.shape:
        raise ValueError(f"b has shape {np.shape(b)}, expected {p.shape}")

    p.residual(b)
    r2 = p.residual_norm()
    if log:
        res = [r2]
    nt = 0
    while r2 > tol and nt < itmx:
        p.smooth(n_smoothing)
        r2 = p.residual_norm()
        if log:
            res.append(r2)
        nt += 1
    p.iterations.append(nt)

    if r2 > tol:
        logger.warning(
            "Poisson solver did not converge: residual %.3e > %.1e after %d iterations",
            r2,
            tol,
            nt,
        )
    else:
        logger.debug("Poisson solver converged: residual %.3e after %d iterations", r2, nt)

    if log:
        return res
    return None
