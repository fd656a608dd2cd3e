"""Augmented Lagrangian method for equality- and bound-constrained problems.

Solves

    min f(x)   s.t.   c(x) = 0,   l <= x <= u

If the problem has no equality constraints it is handed directly to the
bound-constrained solver (TRON). Otherwise the outer loop repeatedly:

1. Minimizes the augmented Lagrangian

       L_A(x; y, mu) = f(x) - y^T c(x) + (mu / 2) ||c(x)||^2

   over the box with TRON, warm-started from the current x.
2. Measures the constraint violation ||c(x)||.
3. Updates the multipliers (y <- y - mu c(x), eta <- eta / mu^0.9) when the
   violation is below the inner tolerance eta, and otherwise increases the
   penalty (mu <- 100 mu, eta <- 1 / mu^0.1).
4. Recomputes the projected gradient of the Lagrangian nabla f - J^T y as the
   dual feasibility measure.
5. Stops when ||gp|| <= atol + rtol ||gp_0|| and ||c(x)|| <= 1e-8, or when an
   iteration, time or evaluation budget is exhausted.

The initial multipliers are the least-squares estimate
y_0 = argmin ||J(x_0)^T y - nabla f(x_0)||, computed with a lineax SVD solve.

The feasibility floor ||c(x)|| <= 1e-8 is below float32 resolution, so
constrained problems need 64-bit precision:

    jax.config.update("jax_enable_x64", True)
"""

import time
from collections.abc import Callable
from typing import Any, Optional

import equinox as eqx
import jax.numpy as jnp
import lineax as lx
from jaxtyping import Array, Float

from auglag_jax.logs import get_logger, log_header, log_row, suppressed_logging
from auglag_jax.model import AugLagModel, NLPModel
from auglag_jax.stationarity import lagrangian_gradient, project, stationarity_measure
from auglag_jax.stats import ExecutionStats
from auglag_jax.tron import tron
from auglag_jax.types import ALStatus

logger = get_logger("al")

# Maximum number of outer iterations
DEFAULT_MAX_ITER: int = 1000
# Wall-clock budget in seconds
DEFAULT_MAX_TIME: float = 30.0
# Maximum number of objective evaluations (-1: unlimited)
DEFAULT_MAX_EVAL: int = -1
# Tolerances on the projected gradient: ||gp|| <= atol + rtol * ||gp_0||
DEFAULT_ATOL: float = 1e-7
DEFAULT_RTOL: float = 1e-7

# Initial penalty parameter mu_0
INITIAL_PENALTY: float = 10.0
# Factor by which mu grows when the violation is too large
PENALTY_UPDATE_FACTOR: float = 100.0
# eta <- eta / mu^ETA_ACCEPT_EXPONENT after a multiplier update
ETA_ACCEPT_EXPONENT: float = 0.9
# eta <- 1 / mu^ETA_RESET_EXPONENT after a penalty increase
ETA_RESET_EXPONENT: float = 0.1
# Initial inner tolerance eta_0
INITIAL_ETA: float = 0.5
# Constraint violation below which the point counts as feasible
FEASIBILITY_TOLERANCE: float = 1e-8

_TRON_LOGGER = "tron"


class ALIterate(eqx.Module):
    """Snapshot of the outer loop after an iteration, passed to callbacks.

    Attributes:
        iter: Outer iteration count (0 for the initial point).
        x: Current point.
        y: Current multiplier estimate.
        mu: Current penalty parameter.
        eta: Current inner tolerance on the constraint violation.
        gp: Projected gradient step of the Lagrangian.
        normgp: Dual feasibility ||gp||.
        normcx: Primal feasibility ||c(x)||.
        elapsed_time: Seconds since the solve started.
    """

    iter: int
    x: Float[Array, " n"]
    y: Float[Array, " m"]
    mu: float
    eta: float
    gp: Float[Array, " n"]
    normgp: float
    normcx: float
    elapsed_time: float


def update_parameters(
    y: Float[Array, " m"],
    mu: float,
    eta: float,
    cx: Float[Array, " m"],
    normcx: float,
) -> tuple[Float[Array, " m"], float, float]:
    """Update the multipliers or the penalty after a subproblem solve.

    If the violation is acceptable (normcx <= eta), the multipliers take a
    first-order step and the inner tolerance tightens:

        y <- y - mu c(x),   eta <- eta / mu^0.9

    Otherwise the penalty grows and the inner tolerance is reset from the new
    penalty:

        mu <- 100 mu,   eta <- 1 / mu^0.1

    Args:
        y: Current multiplier estimate.
        mu: Current penalty parameter.
        eta: Current inner tolerance.
        cx: Constraint values at the subproblem solution.
        normcx: ||cx||.

    Returns:
        Tuple (y, mu, eta) of updated parameters.
    """
    if normcx <= eta:
        return y - mu * cx, mu, eta / mu**ETA_ACCEPT_EXPONENT
    mu = PENALTY_UPDATE_FACTOR * mu
    return y, mu, 1.0 / mu**ETA_RESET_EXPONENT


def least_squares_multipliers(
    jac: Float[Array, "m n"],
    grad: Float[Array, " n"],
) -> Float[Array, " m"]:
    """Least-squares multiplier estimate y = argmin ||J^T y - grad||.

    Rank-deficient Jacobians give the minimum-norm estimate.

    Args:
        jac: Constraint Jacobian J(x), shape (m, n).
        grad: Objective gradient at x.

    Returns:
        The multiplier estimate.
    """
    operator = lx.MatrixLinearOperator(jac.T)
    return lx.linear_solve(operator, grad, lx.SVD()).value


def termination_status(
    solved: bool,
    iteration: int,
    el_time: float,
    num_evals: int,
    max_iter: int,
    max_time: float,
    max_eval: int,
) -> Optional[ALStatus]:
    """Return the terminal status, or None if the loop should continue.

    A solved point takes precedence over budgets. When several budgets are
    exhausted at once, the time budget wins over the iteration budget, which
    wins over the evaluation budget.
    """
    if solved:
        return ALStatus.FIRST_ORDER
    if el_time > max_time:
        return ALStatus.MAX_TIME
    if iteration >= max_iter:
        return ALStatus.MAX_ITER
    if max_eval >= 0 and num_evals > max_eval:
        return ALStatus.MAX_EVAL
    return None


def _check_options(max_iter: int, atol: float, rtol: float) -> None:
    if max_iter < 0:
        raise ValueError(f"max_iter must be non-negative, got {max_iter}")
    if atol < 0:
        raise ValueError(f"atol must be non-negative, got {atol}")
    if rtol < 0:
        raise ValueError(f"rtol must be non-negative, got {rtol}")


def al(
    nlp: NLPModel,
    *,
    max_iter: int = DEFAULT_MAX_ITER,
    max_time: float = DEFAULT_MAX_TIME,
    max_eval: int = DEFAULT_MAX_EVAL,
    atol: float = DEFAULT_ATOL,
    rtol: float = DEFAULT_RTOL,
    callback: Optional[Callable[[ALIterate], Any]] = None,
) -> ExecutionStats:
    """Solve min f(x) s.t. c(x) = 0, l <= x <= u by the augmented Lagrangian method.

    Problems without equality constraints are solved by TRON directly, and
    its result is returned with primal_feas = 0.

    Constrained problems need 64-bit precision (``jax_enable_x64``). A
    warning is logged when x0 is float32.

    Args:
        nlp: The problem.
        max_iter: Maximum number of outer iterations (subproblem solves).
        max_time: Wall-clock budget in seconds, checked once per iteration.
            A running subproblem solve is not interrupted.
        max_eval: Maximum number of objective evaluations, inner solves
            included (-1 for unlimited).
        atol: Absolute tolerance on the projected Lagrangian gradient.
        rtol: Relative tolerance on the projected Lagrangian gradient.
        callback: Optional function called with an ALIterate after the
            initial point and after every outer iteration.

    Returns:
        ExecutionStats with an ALStatus (TronStatus without constraints).

    Raises:
        ValueError: If max_iter, atol or rtol is negative.
    """
    _check_options(max_iter, atol, rtol)

    if nlp.ncon == 0:
        with suppressed_logging(_TRON_LOGGER):
            stats = tron(
                nlp,
                max_iter=max_iter,
                max_time=max_time,
                max_eval=max_eval,
                atol=atol,
                rtol=rtol,
            )
        return stats._replace(primal_feas=0.0)

    if jnp.finfo(nlp.x0.dtype).eps > FEASIBILITY_TOLERANCE:
        logger.warning(
            "x0 has dtype %s, which cannot reach the feasibility tolerance %.0e; "
            "enable 64-bit precision with "
            'jax.config.update("jax_enable_x64", True)',
            nlp.x0.dtype,
            FEASIBILITY_TOLERANCE,
        )

    start_time = time.time()
    lvar, uvar = nlp.lvar, nlp.uvar
    x = project(nlp.x0, lvar, uvar)

    cx = nlp.cons(x)
    Jx = nlp.jac(x)
    gx = nlp.grad(x)

    mu = INITIAL_PENALTY
    y = least_squares_multipliers(Jx, gx)
    eta = INITIAL_ETA

    model = AugLagModel(nlp, y, mu)

    gL = lagrangian_gradient(gx, nlp.jtprod(x, model.y))
    gp, normgp = stationarity_measure(x, gL, lvar, uvar)
    normgp = float(normgp)
    normcx = float(jnp.linalg.norm(cx))

    tol = atol + rtol * normgp

    iteration = 0
    el_time = 0.0
    num_evals = 1

    logger.info(
        log_header(
            ["iter", "fx", "normgp", "normcx", "mu", "eta"],
            [int, float, float, float, float, float],
        )
    )
    logger.info(log_row([iteration, nlp.obj(x), normgp, normcx, mu, eta]))

    if callback is not None:
        callback(ALIterate(iteration, x, model.y, mu, eta, gp, normgp, normcx, el_time))

    solved = normgp <= tol and normcx <= FEASIBILITY_TOLERANCE
    status = termination_status(
        solved, iteration, el_time, num_evals, max_iter, max_time, max_eval
    )

    while status is None:
        # Adopt the subproblem solution whatever the inner status
        with suppressed_logging(_TRON_LOGGER):
            inner = tron(model, x)
        x = inner.solution
        num_evals += inner.num_evals

        cx = nlp.cons(x)
        normcx = float(jnp.linalg.norm(cx))

        y, mu, eta = update_parameters(model.y, mu, eta, cx, normcx)
        model = model.with_multipliers(y).with_penalty(mu)

        gL = model.dual_feasibility(x)
        gp, normgp = stationarity_measure(x, gL, lvar, uvar)
        normgp = float(normgp)

        iteration += 1
        el_time = time.time() - start_time
        num_evals += 1

        solved = normgp <= tol and normcx <= FEASIBILITY_TOLERANCE
        status = termination_status(
            solved, iteration, el_time, num_evals, max_iter, max_time, max_eval
        )

        logger.info(log_row([iteration, nlp.obj(x), normgp, normcx, mu, eta]))
        if callback is not None:
            callback(
                ALIterate(iteration, x, model.y, mu, eta, gp, normgp, normcx, el_time)
            )

    logger.debug("al: %s after %d iterations", status.value, iteration)

    return ExecutionStats(
        status=status,
        solution=x,
        objective=float(nlp.obj(x)),
        dual_feas=normgp,
        primal_feas=normcx,
        iter=iteration,
        elapsed_time=el_time,
        multipliers=model.y,
        num_evals=num_evals,
    )
