from dataclasses import asdict, dataclass
from typing import List, Optional

import numpy as np

from pypoisson.poisson import PoissonOperator
from pypoisson.solver import solver


@dataclass(frozen=True)
class SolverConfig:
    """
    Stopping criteria and smoothing effort of the Poisson solver

    Keeps the settings of a solve that is repeated every step of an outer
    time-stepping loop.
    """

    tol: float = 1e-4
    itmx: int = 1000
    n_smoothing: int = 5

    def __post_init__(self) -> None:
        if float(self.tol) < 0.0:
            raise ValueError(f"tol must be >= 0, got {self.tol}")
        if int(self.itmx) < 0:
            raise ValueError(f"itmx must be >= 0, got {self.itmx}")
        if int(self.n_smoothing) < 0:
            raise ValueError(f"n_smoothing must be >= 0, got {self.n_smoothing}")

    def solve(
        self, p: PoissonOperator, b: np.ndarray, log: bool = False
    ) -> Optional[List[float]]:
        return solver(p, b, log=log, **asdict(self))
