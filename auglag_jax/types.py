"""Type definitions for auglag-jax.

This module contains type aliases and status enumerations used throughout the
package. Array types use jaxtyping for runtime shape checking with beartype.
"""

import enum
from collections.abc import Callable
from typing import Any

from jaxtyping import Array, Float

# Type aliases for common array shapes
Scalar = Float[Array, ""]
Vector = Float[Array, " n"]

# Objective function type: f(x, args) -> scalar
ObjectiveFn = Callable[[Vector, Any], Scalar]

# Constraint function type: takes parameters and args, returns constraint values
# Only equality constraints are supported: c(x) = 0
ConstraintFn = Callable[[Vector, Any], Float[Array, " m"]]

# Gradient function type: grad_fn(x, args) -> ∇f(x)
GradFn = Callable[[Vector, Any], Vector]

# Jacobian function type: jac_fn(x, args) -> J(x) where J[i, j] = dc_i/dx_j
JacobianFn = Callable[[Vector, Any], Float[Array, "m n"]]

# Hessian-vector product of the objective: hvp_fn(x, v, args) -> ∇²f(x) @ v
HVPFn = Callable[[Vector, Vector, Any], Vector]

# Hessian-vector products of the constraints, one row per constraint:
# constraint_hvp_fn(x, v, args) -> stack of ∇²c_i(x) @ v, shape (m, n)
ConstraintHVPFn = Callable[[Vector, Vector, Any], Float[Array, "m n"]]


class ALStatus(enum.Enum):
    """Termination status of the augmented Lagrangian outer loop."""

    FIRST_ORDER = "first_order"
    MAX_ITER = "max_iter"
    MAX_TIME = "max_time"
    MAX_EVAL = "max_eval"


class TronStatus(enum.Enum):
    """Termination status of the bound-constrained trust-region solver."""

    FIRST_ORDER = "first_order"
    MAX_ITER = "max_iter"
    MAX_TIME = "max_time"
    MAX_EVAL = "max_eval"
    SMALL_STEP = "small_step"
