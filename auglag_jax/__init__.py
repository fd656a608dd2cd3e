"""auglag-jax: an augmented Lagrangian method in pure JAX.

This package solves nonlinear programs of the form

    min f(x)  s.t.  c(x) = 0,  l <= x <= u

with an augmented Lagrangian outer loop whose bound-constrained subproblems
are solved by TRON, a projected trust-region Newton method written against
the Optimistix minimiser interface. Derivatives can be user-supplied or are
computed with JAX automatic differentiation; Hessians are only ever accessed
through Hessian-vector products.
"""

from auglag_jax.auglag import (
    ALIterate,
    al,
    least_squares_multipliers,
    termination_status,
    update_parameters,
)
from auglag_jax.logs import log_header, log_row, suppressed_logging
from auglag_jax.model import AugLagModel, NLPModel
from auglag_jax.stationarity import (
    lagrangian_gradient,
    project,
    project_step,
    stationarity_measure,
)
from auglag_jax.stats import ExecutionStats
from auglag_jax.tron import TRON, TRONState, tron
from auglag_jax.types import (
    ALStatus,
    ConstraintFn,
    ConstraintHVPFn,
    GradFn,
    HVPFn,
    JacobianFn,
    ObjectiveFn,
    TronStatus,
)

__all__ = [
    # Main solver
    "al",
    "ALIterate",
    "update_parameters",
    "termination_status",
    "least_squares_multipliers",
    # Models
    "NLPModel",
    "AugLagModel",
    # Bound-constrained solver
    "TRON",
    "TRONState",
    "tron",
    # Results
    "ExecutionStats",
    "ALStatus",
    "TronStatus",
    # Types
    "ObjectiveFn",
    "ConstraintFn",
    "GradFn",
    "JacobianFn",
    "HVPFn",
    "ConstraintHVPFn",
    # Stationarity
    "project",
    "project_step",
    "lagrangian_gradient",
    "stationarity_measure",
    # Logging
    "log_header",
    "log_row",
    "suppressed_logging",
]
