"""Matrix-free variable coefficient Poisson solver on structured grids"""

from pypoisson.config import SolverConfig
from pypoisson.poisson import PoissonOperator
from pypoisson.solver import solver

__all__ = ["PoissonOperator", "SolverConfig", "solver"]
