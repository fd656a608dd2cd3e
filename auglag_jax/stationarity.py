"""Projected-gradient stationarity measure for bound-constrained problems.

For a point x in the box [l, u] and a gradient g, the projected gradient step

    gp = Proj(x - g, l, u) - x

is the displacement produced by projecting the steepest-descent point back
onto the box. Its norm is zero exactly when x is a first-order stationary
point of a function with gradient g over l <= x <= u, and it reduces to ||g||
when no bound is active.

In the augmented Lagrangian method, g is the gradient of the Lagrangian

    nabla_x L(x, y) = nabla f(x) - J(x)^T y

so ||gp|| measures dual feasibility.
"""

import jax.numpy as jnp
from beartype import beartype
from jaxtyping import Array, Float, jaxtyped


@jaxtyped(typechecker=beartype)
def project(
    x: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Project x onto the box [lower, upper].

    Infinite bounds never clip.
    """
    return jnp.clip(x, lower, upper)


@jaxtyped(typechecker=beartype)
def project_step(
    x: Float[Array, " n"],
    d: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute the projected step Proj(x + d, lower, upper) - x.

    Components of fixed variables (lower_i == upper_i) are forced to zero.

    Args:
        x: Current point, assumed to lie within the bounds.
        d: Unprojected step.
        lower: Lower bounds (may contain -inf).
        upper: Upper bounds (may contain +inf).

    Returns:
        The projected step.
    """
    step = jnp.clip(x + d, lower, upper) - x
    return jnp.where(lower == upper, 0.0, step)


@jaxtyped(typechecker=beartype)
def lagrangian_gradient(
    grad_f: Float[Array, " n"],
    jtprod_y: Float[Array, " n"],
) -> Float[Array, " n"]:
    """Compute the gradient of the Lagrangian L(x, y) = f(x) - y^T c(x).

    Args:
        grad_f: Gradient of the objective nabla f(x).
        jtprod_y: Jacobian-transpose product J(x)^T y.

    Returns:
        nabla f(x) - J(x)^T y.
    """
    return grad_f - jtprod_y


@jaxtyped(typechecker=beartype)
def stationarity_measure(
    x: Float[Array, " n"],
    grad_lagrangian: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
) -> tuple[Float[Array, " n"], Float[Array, ""]]:
    """Compute the projected gradient step and its Euclidean norm.

    Args:
        x: Current point.
        grad_lagrangian: Gradient of the (generalized) Lagrangian at x.
        lower: Lower bounds.
        upper: Upper bounds.

    Returns:
        Tuple (gp, ||gp||) with gp = Proj(x - grad_lagrangian) - x.
    """
    gp = project_step(x, -grad_lagrangian, lower, upper)
    return gp, jnp.linalg.norm(gp)
