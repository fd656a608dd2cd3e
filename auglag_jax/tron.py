"""TRON: projected trust-region Newton method for bound-constrained problems.

This module contains a bound-constrained trust-region solver that extends
optimistix.AbstractMinimiser, in the spirit of Lin & Moré's TRON:

    min f(x)   s.t.   lower <= x <= upper

Each iteration builds the quadratic model

    q(s) = g^T s + (1/2) s^T H s

where H is accessed only through Hessian-vector products, and then:

1. Computes a generalized Cauchy step by a projected backtracking search
   along -g, starting on the trust-region boundary, until the sufficient
   decrease condition q(s) <= mu0 * g^T s holds.
2. Refines the Cauchy step with Steihaug's truncated conjugate gradient on
   the variables that are strictly inside their bounds, stopping at the
   trust-region boundary or on negative curvature, and projects the result
   back onto the box. The refinement is kept only if it lowers the model.
3. Accepts or rejects the step from the ratio of actual to predicted
   reduction and updates the trust-region radius.

Gradients and HVPs can be user-supplied or computed automatically via
jax.grad (reverse mode) and forward-over-reverse AD.

The module also provides `tron`, a driver that runs the solver on any model
exposing obj/grad/hvp and lvar/uvar/x0 (NLPModel or AugLagModel) under
wall-clock and evaluation budgets.
"""

import time
from collections.abc import Callable
from typing import Any, NamedTuple, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import optimistix as optx
import optimistix._misc as optx_misc
from jaxtyping import Array, Bool, Float, Int

from auglag_jax.logs import get_logger, log_header, log_row
from auglag_jax.stationarity import project, project_step
from auglag_jax.stats import ExecutionStats
from auglag_jax.types import GradFn, HVPFn, TronStatus
from auglag_jax.utils import hvp_closure

logger = get_logger("tron")

DEFAULT_MAX_ITER: int = 1000
DEFAULT_MAX_TIME: float = 30.0
DEFAULT_MAX_CG_ITER: int = 50


class TRONState(eqx.Module):
    """State for the TRON solver.

    Attributes:
        step_count: Current iteration number.
        f_val: Objective value at the current point.
        grad: Gradient of objective at current point.
        radius: Trust-region radius.
        gp_norm: Norm of the projected gradient step at the current point.
        gp_norm0: Norm of the projected gradient step at the initial point.
        step_norm: Norm of the last accepted step (0 if rejected).
        num_evals: Number of objective evaluations so far.
    """

    step_count: Int[Array, ""]
    f_val: Float[Array, ""]
    grad: Float[Array, " n"]
    radius: Float[Array, ""]
    gp_norm: Float[Array, ""]
    gp_norm0: Float[Array, ""]
    step_norm: Float[Array, ""]
    num_evals: Int[Array, ""]


class _SearchState(NamedTuple):
    """Internal state for the projected backtracking search."""

    alpha: Float[Array, ""]
    s: Float[Array, " n"]
    iteration: Int[Array, ""]
    done: Bool[Array, ""]


class _SteihaugState(NamedTuple):
    """Internal state for the truncated conjugate gradient solver."""

    w: Float[Array, " n"]
    r: Float[Array, " n"]
    p: Float[Array, " n"]
    r_norm_sq: Float[Array, ""]
    iteration: Int[Array, ""]
    done: Bool[Array, ""]


def _model_value(
    hvp_fn: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    g: Float[Array, " n"],
    s: Float[Array, " n"],
) -> Float[Array, ""]:
    """Predicted change q(s) = g^T s + (1/2) s^T H s."""
    return jnp.dot(g, s) + 0.5 * jnp.dot(s, hvp_fn(s))


def _cauchy_step(
    hvp_fn: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    x: Float[Array, " n"],
    g: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    radius: Float[Array, ""],
    mu0: float,
    max_steps: int,
    shrink: float = 0.5,
) -> Float[Array, " n"]:
    """Projected backtracking search along the steepest-descent direction.

    Finds s(alpha) = Proj(x - alpha g) - x such that

        q(s(alpha)) <= mu0 * g^T s(alpha)

    starting from the step length that puts -alpha g on the trust-region
    boundary. Since x lies in the box, ||s(alpha)|| <= alpha ||g|| <= radius.

    Args:
        hvp_fn: Hessian-vector product function v -> H @ v.
        x: Current point.
        g: Gradient at x.
        lower: Lower bounds.
        upper: Upper bounds.
        radius: Trust-region radius.
        mu0: Sufficient decrease parameter.
        max_steps: Maximum number of backtracking steps.
        shrink: Step reduction factor.

    Returns:
        The Cauchy step.
    """
    g_norm = jnp.linalg.norm(g)
    alpha0 = radius / jnp.maximum(g_norm, 1e-30)

    def evaluate(alpha):
        s = project_step(x, -alpha * g, lower, upper)
        sufficient = _model_value(hvp_fn, g, s) <= mu0 * jnp.dot(g, s)
        return s, sufficient

    s0, done0 = evaluate(alpha0)
    init_state = _SearchState(
        alpha=alpha0,
        s=s0,
        iteration=jnp.array(0),
        done=done0,
    )

    def cond_fn(state: _SearchState) -> Bool[Array, ""]:
        return ~state.done & (state.iteration < max_steps)

    def body_fn(state: _SearchState) -> _SearchState:
        alpha = shrink * state.alpha
        s, done = evaluate(alpha)
        return _SearchState(
            alpha=alpha,
            s=s,
            iteration=state.iteration + 1,
            done=done,
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)
    return final_state.s


def _boundary_step(
    z: Float[Array, " n"],
    p: Float[Array, " n"],
    radius: Float[Array, ""],
) -> Float[Array, ""]:
    """Largest tau >= 0 such that ||z + tau p|| <= radius, for ||z|| <= radius."""
    a = jnp.dot(p, p)
    b = 2.0 * jnp.dot(z, p)
    c = jnp.dot(z, z) - radius**2
    disc = jnp.maximum(b * b - 4.0 * a * c, 0.0)
    tau = (-b + jnp.sqrt(disc)) / (2.0 * jnp.maximum(a, 1e-30))
    return jnp.maximum(tau, 0.0)


def _subspace_step(
    hvp_fn: Callable[[Float[Array, " n"]], Float[Array, " n"]],
    x: Float[Array, " n"],
    g: Float[Array, " n"],
    s: Float[Array, " n"],
    lower: Float[Array, " n"],
    upper: Float[Array, " n"],
    radius: Float[Array, ""],
    max_cg_iter: int,
) -> Float[Array, " n"]:
    """Refine the Cauchy step on the free variables with Steihaug CG.

    Approximately minimizes q(s + w) over w supported on the variables that
    are strictly inside their bounds at x + s, subject to ||s + w|| <= radius.
    The CG iteration stops on convergence, on negative curvature, or when the
    iterate leaves the trust region; in the last two cases it moves to the
    boundary along the current direction.

    Args:
        hvp_fn: Hessian-vector product function v -> H @ v.
        x: Current point.
        g: Gradient at x.
        s: Cauchy step.
        lower: Lower bounds.
        upper: Upper bounds.
        radius: Trust-region radius.
        max_cg_iter: Maximum CG iterations.

    Returns:
        The refined step, projected onto the box.
    """
    z = x + s
    free = ((z > lower) & (z < upper)).astype(x.dtype)

    def reduced_hvp(v):
        return free * hvp_fn(free * v)

    # Residual of the model gradient at the Cauchy point, on free variables
    r0 = -free * (g + hvp_fn(s))
    r0_norm_sq = jnp.dot(r0, r0)
    r0_norm = jnp.sqrt(r0_norm_sq)
    cg_tol = jnp.minimum(0.1, jnp.sqrt(r0_norm)) * r0_norm

    init_state = _SteihaugState(
        w=jnp.zeros_like(x),
        r=r0,
        p=r0,
        r_norm_sq=r0_norm_sq,
        iteration=jnp.array(0),
        done=r0_norm <= cg_tol,
    )

    def cond_fn(state: _SteihaugState) -> Bool[Array, ""]:
        return ~state.done & (state.iteration < max_cg_iter)

    def body_fn(state: _SteihaugState) -> _SteihaugState:
        Hp = reduced_hvp(state.p)
        pHp = jnp.dot(state.p, Hp)
        positive_curvature = pHp > 0.0
        alpha = state.r_norm_sq / jnp.where(positive_curvature, pHp, 1.0)

        w_trial = state.w + alpha * state.p
        leaves_region = jnp.linalg.norm(s + w_trial) >= radius
        hit_boundary = ~positive_curvature | leaves_region

        tau = _boundary_step(s + state.w, state.p, radius)
        w_new = jnp.where(hit_boundary, state.w + tau * state.p, w_trial)

        r_new = state.r - alpha * Hp
        r_new_norm_sq = jnp.dot(r_new, r_new)
        beta = r_new_norm_sq / jnp.maximum(state.r_norm_sq, 1e-30)
        p_new = r_new + beta * state.p

        return _SteihaugState(
            w=w_new,
            r=r_new,
            p=p_new,
            r_norm_sq=r_new_norm_sq,
            iteration=state.iteration + 1,
            done=hit_boundary | (jnp.sqrt(r_new_norm_sq) <= cg_tol),
        )

    final_state = jax.lax.while_loop(cond_fn, body_fn, init_state)
    return project_step(x, s + final_state.w, lower, upper)


class TRON(optx.AbstractMinimiser):
    """Bound-constrained trust-region Newton minimiser.

    The Hessian is never formed as a dense matrix. It is accessed only
    through Hessian-vector products, either user-supplied (hvp_fn) or
    computed by forward-over-reverse AD of the objective.

    Attributes:
        rtol: Relative tolerance on the projected gradient norm.
        atol: Absolute tolerance on the projected gradient norm.
        max_steps: Maximum number of iterations.
        lower: Lower bounds (None means unbounded below).
        upper: Upper bounds (None means unbounded above).
        grad_fn: Optional gradient of objective, grad_fn(y, args).
        hvp_fn: Optional HVP of objective, hvp_fn(y, v, args).
        max_cg_iter: Maximum Steihaug CG iterations per step.
        max_search_steps: Maximum backtracking steps in the Cauchy search.
        initial_radius: Lower bound on the initial trust-region radius.
        mu0: Sufficient decrease parameter of the Cauchy search.
        eta_accept: Minimum reduction ratio for accepting a step.
        eta_shrink: Reduction ratio below which the radius shrinks.
        eta_expand: Reduction ratio above which the radius expands.
        sigma_shrink: Radius shrink factor.
        sigma_expand: Radius expansion factor.
        min_radius: Radius below which the solver stops with a small step.

    Example:
        >>> import jax.numpy as jnp
        >>> import optimistix as optx
        >>> from auglag_jax import TRON
        >>>
        >>> def objective(x, args):
        ...     return jnp.sum((x - 2.0) ** 2), None
        >>>
        >>> solver = TRON(lower=jnp.zeros(2), upper=jnp.ones(2))
    """

    # Convergence tolerances
    rtol: float = 1e-8
    atol: float = 1e-8

    # Norm function (required by AbstractMinimiser)
    norm: Callable = eqx.field(static=True, default=optx_misc.max_norm)

    # Maximum iterations
    max_steps: int = DEFAULT_MAX_ITER

    # Box constraints; -inf / +inf for unbounded components
    lower: Optional[Float[Array, " n"]] = None
    upper: Optional[Float[Array, " n"]] = None

    # Optional user-supplied derivative functions
    grad_fn: Optional[GradFn] = eqx.field(static=True, default=None)
    hvp_fn: Optional[HVPFn] = eqx.field(static=True, default=None)

    # Subproblem parameters
    max_cg_iter: int = eqx.field(static=True, default=DEFAULT_MAX_CG_ITER)
    max_search_steps: int = eqx.field(static=True, default=30)
    mu0: float = 1e-2

    # Trust-region parameters
    initial_radius: float = 1.0
    eta_accept: float = 1e-4
    eta_shrink: float = 0.25
    eta_expand: float = 0.75
    sigma_shrink: float = 0.25
    sigma_expand: float = 4.0
    min_radius: float = 1e-16

    def _bounds(
        self, y: Float[Array, " n"]
    ) -> tuple[Float[Array, " n"], Float[Array, " n"]]:
        lower = jnp.full_like(y, -jnp.inf) if self.lower is None else self.lower
        upper = jnp.full_like(y, jnp.inf) if self.upper is None else self.upper
        return lower, upper

    def _compute_grad(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
    ) -> Float[Array, " n"]:
        """Compute gradient of objective using user-supplied fn or AD."""
        if self.grad_fn is not None:
            return self.grad_fn(y, args)
        return jax.grad(lambda x: fn(x, args)[0])(y)

    def _build_hvp(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
    ) -> Callable[[Float[Array, " n"]], Float[Array, " n"]]:
        """Build the closure v -> H(y) @ v."""
        if self.hvp_fn is not None:
            return hvp_closure(self.hvp_fn, y, args)

        def ad_hvp(v: Float[Array, " n"]) -> Float[Array, " n"]:
            _, hv = jax.jvp(jax.grad(lambda x: fn(x, args)[0]), (y,), (v,))
            return hv

        return ad_hvp

    def init(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        f_struct: Any,
        aux_struct: Any,
        tags: frozenset[object],
    ) -> TRONState:
        """Initialize the TRON solver state.

        Evaluates the objective and gradient at the initial point, which is
        expected to lie within the bounds, and sizes the initial trust region
        from the projected gradient.

        Args:
            fn: Objective function with signature fn(y, args) -> (f_val, aux).
            y: Initial parameter values.
            args: Additional arguments passed to fn.
            options: Runtime options dictionary.
            f_struct: Structure of function output (for type inference).
            aux_struct: Structure of auxiliary output.
            tags: Lineax tags for the problem.

        Returns:
            Initial TRONState.
        """
        lower, upper = self._bounds(y)
        f_val, _aux = fn(y, args)
        grad = self._compute_grad(fn, y, args)
        gp_norm = jnp.linalg.norm(project_step(y, -grad, lower, upper))
        radius = jnp.maximum(self.initial_radius, 0.1 * gp_norm)

        return TRONState(
            step_count=jnp.array(0),
            f_val=f_val,
            grad=grad,
            radius=radius,
            gp_norm=gp_norm,
            gp_norm0=gp_norm,
            step_norm=jnp.zeros_like(f_val),
            num_evals=jnp.array(1),
        )

    def step(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: TRONState,
        tags: frozenset[object],
    ) -> tuple[Float[Array, " n"], TRONState, Any]:
        """Perform one TRON iteration.

        This method:
        1. Computes the Cauchy step by projected search.
        2. Refines it with Steihaug CG on the free variables.
        3. Evaluates the reduction ratio and accepts or rejects the step.
        4. Updates the trust-region radius and the projected gradient norm.

        Args:
            fn: Objective function.
            y: Current parameter values.
            args: Additional arguments.
            options: Runtime options.
            state: Current solver state.
            tags: Lineax tags.

        Returns:
            Tuple of (new_y, new_state, aux).
        """
        lower, upper = self._bounds(y)
        hvp_fn = self._build_hvp(fn, y, args)
        g = state.grad

        # Step 1: Cauchy step
        s_cauchy = _cauchy_step(
            hvp_fn,
            y,
            g,
            lower,
            upper,
            state.radius,
            self.mu0,
            self.max_search_steps,
        )

        # Step 2: Subspace refinement, kept only if it lowers the model
        s_sub = _subspace_step(
            hvp_fn, y, g, s_cauchy, lower, upper, state.radius, self.max_cg_iter
        )
        q_cauchy = _model_value(hvp_fn, g, s_cauchy)
        q_sub = _model_value(hvp_fn, g, s_sub)
        use_sub = q_sub <= q_cauchy
        s = jnp.where(use_sub, s_sub, s_cauchy)
        predicted = jnp.where(use_sub, q_sub, q_cauchy)

        # Step 3: Reduction ratio
        y_trial = project(y + s, lower, upper)
        f_trial, _ = fn(y_trial, args)
        actual = f_trial - state.f_val
        has_decrease = predicted < 0.0
        rho = jnp.where(
            has_decrease,
            actual / jnp.where(has_decrease, predicted, -1.0),
            -jnp.inf,
        )
        accept = (rho > self.eta_accept) & jnp.isfinite(f_trial)

        # Step 4: Trust-region radius update
        s_norm = jnp.linalg.norm(s)
        radius = jnp.where(
            ~accept | (rho < self.eta_shrink),
            self.sigma_shrink * jnp.minimum(s_norm, state.radius),
            jnp.where(
                rho > self.eta_expand,
                jnp.maximum(state.radius, self.sigma_expand * s_norm),
                state.radius,
            ),
        )

        y_new = jnp.where(accept, y_trial, y)
        f_val_new = jnp.where(accept, f_trial, state.f_val)
        grad_new = jnp.where(accept, self._compute_grad(fn, y_trial, args), g)
        gp_norm = jnp.linalg.norm(project_step(y_new, -grad_new, lower, upper))

        # Get auxiliary output from function evaluation
        _, aux = fn(y_new, args)

        new_state = TRONState(
            step_count=state.step_count + 1,
            f_val=f_val_new,
            grad=grad_new,
            radius=radius,
            gp_norm=gp_norm,
            gp_norm0=state.gp_norm0,
            step_norm=jnp.where(accept, s_norm, 0.0),
            num_evals=state.num_evals + 1,
        )

        return y_new, new_state, aux

    def _converged(self, state: TRONState) -> Bool[Array, ""]:
        return state.gp_norm <= self.atol + self.rtol * state.gp_norm0

    def terminate(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        args: Any,
        options: dict[str, Any],
        state: TRONState,
        tags: frozenset[object],
    ) -> tuple[Bool[Array, ""], Any]:
        """Check if the solver should terminate.

        Stops when the projected gradient is small, when the trust region
        has collapsed, or when the iteration budget is exhausted.

        Returns:
            Tuple of (done, result) where done is a bool indicating
            termination and result is the termination status code.
        """
        converged = self._converged(state)
        small_step = state.radius <= self.min_radius
        max_iters_reached = state.step_count >= self.max_steps

        done = converged | small_step | max_iters_reached

        result = jax.lax.cond(
            ~converged & max_iters_reached,
            lambda: optx.RESULTS.max_steps_reached,
            lambda: optx.RESULTS.successful,
        )

        return done, result

    def postprocess(
        self,
        fn: Callable,
        y: Float[Array, " n"],
        aux: Any,
        args: Any,
        options: dict[str, Any],
        state: TRONState,
        tags: frozenset[object],
        result: Any,
    ) -> tuple[Float[Array, " n"], Any, dict[str, Any]]:
        """Post-process the optimization result.

        Returns:
            Tuple of (y, aux, stats) where stats is a dictionary
            containing solver statistics.
        """
        stats = {
            "num_steps": state.step_count,
            "final_objective": state.f_val,
            "projected_grad_norm": state.gp_norm,
            "radius": state.radius,
            "num_evals": state.num_evals,
        }

        return y, aux, stats


def _model_objective(x, model):
    return model.obj(x), None


def _model_gradient(x, model):
    return model.grad(x)


def _model_hvp(x, v, model):
    return model.hvp(x, v)


@eqx.filter_jit
def _tron_init(solver: TRON, x, model) -> TRONState:
    return solver.init(_model_objective, x, model, {}, None, None, frozenset())


@eqx.filter_jit
def _tron_step(solver: TRON, x, model, state: TRONState):
    x_new, state_new, _ = solver.step(
        _model_objective, x, model, {}, state, frozenset()
    )
    return x_new, state_new


@eqx.filter_jit
def _tron_terminate(solver: TRON, x, model, state: TRONState):
    done, _ = solver.terminate(_model_objective, x, model, {}, state, frozenset())
    return done


def _default_tolerance(dtype) -> float:
    return float(np.sqrt(np.finfo(dtype).eps))


def tron(
    model: Any,
    x: Optional[Any] = None,
    *,
    max_iter: int = DEFAULT_MAX_ITER,
    max_time: float = DEFAULT_MAX_TIME,
    max_eval: int = -1,
    atol: Optional[float] = None,
    rtol: Optional[float] = None,
    max_cg_iter: int = DEFAULT_MAX_CG_ITER,
) -> ExecutionStats:
    """Minimize a bound-constrained model with TRON.

    The model is passed to the solver as ``args``, so consecutive calls with
    models that differ only in array values (e.g. augmented Lagrangian
    subproblems with new multipliers) reuse the compiled step.

    Args:
        model: Object exposing obj(x), grad(x), hvp(x, v), x0, lvar and uvar.
        x: Starting point (default model.x0). It is projected onto the box.
        max_iter: Maximum number of iterations.
        max_time: Wall-clock budget in seconds, checked between iterations.
        max_eval: Maximum number of objective evaluations (-1 for unlimited).
        atol: Absolute tolerance on the projected gradient norm
            (default sqrt(eps) of the working dtype).
        rtol: Relative tolerance on the projected gradient norm
            (default sqrt(eps) of the working dtype).
        max_cg_iter: Maximum Steihaug CG iterations per step.

    Returns:
        ExecutionStats with a TronStatus.
    """
    start_time = time.time()
    x0 = model.x0 if x is None else x
    x = project(jnp.asarray(x0, dtype=model.x0.dtype), model.lvar, model.uvar)

    if atol is None:
        atol = _default_tolerance(x.dtype)
    if rtol is None:
        rtol = _default_tolerance(x.dtype)

    solver = TRON(
        rtol=rtol,
        atol=atol,
        max_steps=max_iter,
        lower=model.lvar,
        upper=model.uvar,
        grad_fn=_model_gradient,
        hvp_fn=_model_hvp,
        max_cg_iter=max_cg_iter,
    )
    state = _tron_init(solver, x, model)

    logger.info(
        log_header(
            ["iter", "f", "normgp", "radius", "normstep"],
            [int, float, float, float, float],
        )
    )
    logger.info(log_row([0, state.f_val, state.gp_norm, state.radius, "-"]))

    while True:
        done = bool(_tron_terminate(solver, x, model, state))
        el_time = time.time() - start_time
        num_evals = int(state.num_evals)
        out_of_evals = max_eval >= 0 and num_evals > max_eval
        if done or el_time > max_time or out_of_evals:
            break
        x, state = _tron_step(solver, x, model, state)
        logger.info(
            log_row(
                [
                    int(state.step_count),
                    state.f_val,
                    state.gp_norm,
                    state.radius,
                    state.step_norm,
                ]
            )
        )

    if bool(solver._converged(state)):
        status = TronStatus.FIRST_ORDER
    elif float(state.radius) <= solver.min_radius:
        status = TronStatus.SMALL_STEP
    elif el_time > max_time:
        status = TronStatus.MAX_TIME
    elif int(state.step_count) >= max_iter:
        status = TronStatus.MAX_ITER
    else:
        status = TronStatus.MAX_EVAL

    logger.debug("tron: %s after %d iterations", status.value, int(state.step_count))

    return ExecutionStats(
        status=status,
        solution=x,
        objective=float(state.f_val),
        dual_feas=float(state.gp_norm),
        primal_feas=0.0,
        iter=int(state.step_count),
        elapsed_time=el_time,
        multipliers=jnp.zeros((0,), dtype=x.dtype),
        num_evals=num_evals,
    )
