"""Problem models for the augmented Lagrangian method.

This module contains two immutable models, both JAX PyTrees (via eqx.Module):

- NLPModel: the user's problem

      min f(x)  s.t.  c(x) = 0,  lvar <= x <= uvar

  built from plain callables. Derivatives that are not supplied are computed
  with JAX automatic differentiation (reverse mode for gradients and
  Jacobians, forward-over-reverse for Hessian-vector products).

- AugLagModel: the bound-constrained augmented Lagrangian subproblem

      L_A(x; y, mu) = f(x) - y^T c(x) + (mu / 2) ||c(x)||^2

  for a fixed multiplier estimate y and penalty mu > 0.

Neither model caches anything: every evaluation is recomputed from x and the
model's fields. The outer loop replaces an AugLagModel with a new value when
(y, mu) change instead of mutating it.
"""

from typing import Any, Optional

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jaxtyping import Array, Float

from auglag_jax.types import (
    ConstraintFn,
    ConstraintHVPFn,
    GradFn,
    HVPFn,
    JacobianFn,
    ObjectiveFn,
)
from auglag_jax.utils import args_closure


class NLPModel(eqx.Module):
    """Equality- and bound-constrained nonlinear program.

    Users can optionally supply their own derivative functions:
    - grad_fn: Gradient of objective (else jax.grad).
    - jac_fn: Jacobian of constraints (else jax.jacrev, or jax.jvp/jax.vjp
      for Jacobian-vector products).
    - hvp_fn: HVP of objective (else forward-over-reverse AD).
    - cons_hvp_fn: Per-constraint HVPs (else forward-over-reverse AD on y^T c).

    Integer x0 is promoted to JAX's default float dtype, which is float32
    unless ``jax_enable_x64`` is set. Constrained solves need float64.

    Attributes:
        fn: Objective function f(x, args) -> scalar.
        x0: Initial point.
        lvar: Lower bounds, -inf where unbounded.
        uvar: Upper bounds, +inf where unbounded.
        cons_fn: Equality constraint function c(x, args) -> (ncon,), or None.
        ncon: Number of equality constraints (static).
        grad_fn: Optional gradient of objective.
        jac_fn: Optional Jacobian of constraints.
        hvp_fn: Optional HVP of objective.
        cons_hvp_fn: Optional per-constraint HVP stack, shape (ncon, n).
        args: PyTree forwarded to every user callable.
        name: Problem name, used in logs.

    Example:
        >>> import jax.numpy as jnp
        >>> from auglag_jax import NLPModel
        >>>
        >>> def objective(x, args):
        ...     return jnp.sum(x**2)
        >>>
        >>> def constraint(x, args):
        ...     return jnp.array([x[0] + x[1] - 1.0])
        >>>
        >>> nlp = NLPModel(objective, jnp.zeros(2), cons_fn=constraint, ncon=1)
    """

    fn: ObjectiveFn = eqx.field(static=True)
    x0: Float[Array, " n"]
    lvar: Float[Array, " n"]
    uvar: Float[Array, " n"]
    cons_fn: Optional[ConstraintFn] = eqx.field(static=True)
    ncon: int = eqx.field(static=True)
    grad_fn: Optional[GradFn] = eqx.field(static=True)
    jac_fn: Optional[JacobianFn] = eqx.field(static=True)
    hvp_fn: Optional[HVPFn] = eqx.field(static=True)
    cons_hvp_fn: Optional[ConstraintHVPFn] = eqx.field(static=True)
    args: Any
    name: str = eqx.field(static=True)

    def __init__(
        self,
        fn: ObjectiveFn,
        x0: Any,
        lvar: Any = None,
        uvar: Any = None,
        cons_fn: Optional[ConstraintFn] = None,
        ncon: int = 0,
        *,
        grad_fn: Optional[GradFn] = None,
        jac_fn: Optional[JacobianFn] = None,
        hvp_fn: Optional[HVPFn] = None,
        cons_hvp_fn: Optional[ConstraintHVPFn] = None,
        args: Any = None,
        name: str = "generic",
    ):
        x0 = jnp.asarray(x0)
        if not jnp.issubdtype(x0.dtype, jnp.floating):
            x0 = x0.astype(jnp.result_type(float))
        self.fn = fn
        self.x0 = x0
        # Missing bounds mean the variable is free on that side
        self.lvar = (
            jnp.full_like(x0, -jnp.inf)
            if lvar is None
            else jnp.asarray(lvar, dtype=x0.dtype)
        )
        self.uvar = (
            jnp.full_like(x0, jnp.inf)
            if uvar is None
            else jnp.asarray(uvar, dtype=x0.dtype)
        )
        self.cons_fn = cons_fn
        self.ncon = int(ncon)
        self.grad_fn = grad_fn
        self.jac_fn = jac_fn
        self.hvp_fn = hvp_fn
        self.cons_hvp_fn = cons_hvp_fn
        self.args = args
        self.name = name

    def __check_init__(self):
        """Validate problem dimensions.

        Raises:
            ValueError: If the initial point is not a vector, the bounds do not
                match its shape, a lower bound exceeds its upper bound, or the
                constraint count is inconsistent with cons_fn.
        """
        if self.x0.ndim != 1:
            raise ValueError(f"x0 must be one-dimensional, got shape {self.x0.shape}")
        if self.lvar.shape != self.x0.shape:
            raise ValueError(
                f"lvar has shape {self.lvar.shape}, expected {self.x0.shape}"
            )
        if self.uvar.shape != self.x0.shape:
            raise ValueError(
                f"uvar has shape {self.uvar.shape}, expected {self.x0.shape}"
            )
        if np.any(np.asarray(self.lvar) > np.asarray(self.uvar)):
            raise ValueError("lvar must not exceed uvar")
        if self.ncon < 0:
            raise ValueError(f"ncon must be non-negative, got {self.ncon}")
        if self.ncon > 0 and self.cons_fn is None:
            raise ValueError(f"ncon={self.ncon} but no cons_fn was given")
        if self.ncon == 0 and self.cons_fn is not None:
            raise ValueError("cons_fn was given but ncon=0")

    @property
    def nvar(self) -> int:
        return self.x0.shape[0]

    def obj(self, x: Float[Array, " n"]) -> Float[Array, ""]:
        return self.fn(x, self.args)

    def grad(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        """Compute gradient of objective using user-supplied fn or AD."""
        if self.grad_fn is not None:
            return self.grad_fn(x, self.args)
        return jax.grad(args_closure(self.fn, self.args))(x)

    def cons(self, x: Float[Array, " n"]) -> Float[Array, " m"]:
        if self.cons_fn is None or self.ncon == 0:
            return jnp.zeros((0,), dtype=x.dtype)
        return self.cons_fn(x, self.args)

    def jac(self, x: Float[Array, " n"]) -> Float[Array, "m n"]:
        """Compute the constraint Jacobian (user-supplied or AD via jacrev)."""
        if self.cons_fn is None or self.ncon == 0:
            return jnp.zeros((0, x.shape[0]), dtype=x.dtype)
        if self.jac_fn is not None:
            return self.jac_fn(x, self.args)
        return jax.jacrev(args_closure(self.cons_fn, self.args))(x)

    def jprod(self, x: Float[Array, " n"], v: Float[Array, " n"]) -> Float[Array, " m"]:
        """Compute J(x) @ v without forming J when no jac_fn is given."""
        if self.cons_fn is None or self.ncon == 0:
            return jnp.zeros((0,), dtype=x.dtype)
        if self.jac_fn is not None:
            return self.jac_fn(x, self.args) @ v
        _, jv = jax.jvp(args_closure(self.cons_fn, self.args), (x,), (v,))
        return jv

    def jtprod(
        self, x: Float[Array, " n"], y: Float[Array, " m"]
    ) -> Float[Array, " n"]:
        """Compute J(x)^T @ y without forming J when no jac_fn is given."""
        if self.cons_fn is None or self.ncon == 0:
            return jnp.zeros_like(x)
        if self.jac_fn is not None:
            return self.jac_fn(x, self.args).T @ y
        _, vjp_fn = jax.vjp(args_closure(self.cons_fn, self.args), x)
        (jty,) = vjp_fn(y)
        return jty

    def hvp(self, x: Float[Array, " n"], v: Float[Array, " n"]) -> Float[Array, " n"]:
        """Hessian-vector product of the objective alone."""
        if self.hvp_fn is not None:
            return self.hvp_fn(x, v, self.args)
        _, hv = jax.jvp(jax.grad(args_closure(self.fn, self.args)), (x,), (v,))
        return hv

    def hprod(
        self,
        x: Float[Array, " n"],
        y: Float[Array, " m"],
        v: Float[Array, " n"],
        obj_weight: float = 1.0,
    ) -> Float[Array, " n"]:
        """Hessian of the Lagrangian times a vector.

        With L(x, y) = obj_weight * f(x) - y^T c(x), computes

            H_L v = obj_weight * H_f v - sum_i y_i * H_{c_i} v

        Args:
            x: Point at which the Hessian is evaluated.
            y: Constraint multipliers.
            v: Vector to multiply.
            obj_weight: Weight of the objective Hessian.

        Returns:
            H_L(x, y) @ v.
        """
        result = obj_weight * self.hvp(x, v)
        if self.cons_fn is None or self.ncon == 0:
            return result

        if self.cons_hvp_fn is not None:
            # User-supplied per-constraint HVPs: (m, n)
            cons_contribution = y @ self.cons_hvp_fn(x, v, self.args)
        else:
            # AD fallback: forward-over-reverse on y^T c(x)
            def weighted_cons(z):
                return jnp.dot(y, self.cons_fn(z, self.args))

            _, cons_contribution = jax.jvp(jax.grad(weighted_cons), (x,), (v,))

        return result - cons_contribution


class AugLagModel(eqx.Module):
    """Augmented Lagrangian subproblem of an NLPModel.

    For fixed multipliers y and penalty mu, this is the bound-constrained
    problem

        min  f(x) - y^T c(x) + (mu / 2) c(x)^T c(x)   s.t.  lvar <= x <= uvar

    with

        gradient  nabla f(x) - J(x)^T y + mu J(x)^T c(x)
        HVP       H_L(x, y - mu c(x)) v + mu J(x)^T (J(x) v)

    Attributes:
        nlp: The wrapped equality-constrained model.
        y: Lagrange multiplier estimate, shape (ncon,).
        mu: Penalty parameter, always positive.
    """

    nlp: NLPModel
    y: Float[Array, " m"]
    mu: Float[Array, ""]

    def __init__(self, nlp: NLPModel, y: Any, mu: Any):
        if float(mu) <= 0.0:
            raise ValueError(f"penalty parameter must be positive, got {mu}")
        dtype = nlp.x0.dtype
        self.nlp = nlp
        self.y = jnp.asarray(y, dtype=dtype)
        self.mu = jnp.asarray(mu, dtype=dtype)

    def __check_init__(self):
        if self.y.shape != (self.nlp.ncon,):
            raise ValueError(
                f"y has shape {self.y.shape}, expected ({self.nlp.ncon},)"
            )

    @property
    def x0(self) -> Float[Array, " n"]:
        return self.nlp.x0

    @property
    def lvar(self) -> Float[Array, " n"]:
        return self.nlp.lvar

    @property
    def uvar(self) -> Float[Array, " n"]:
        return self.nlp.uvar

    @property
    def nvar(self) -> int:
        return self.nlp.nvar

    def with_multipliers(self, y: Float[Array, " m"]) -> "AugLagModel":
        return eqx.tree_at(lambda m: m.y, self, jnp.asarray(y, dtype=self.y.dtype))

    def with_penalty(self, mu: Any) -> "AugLagModel":
        if float(mu) <= 0.0:
            raise ValueError(f"penalty parameter must be positive, got {mu}")
        return eqx.tree_at(lambda m: m.mu, self, jnp.asarray(mu, dtype=self.mu.dtype))

    def obj(self, x: Float[Array, " n"]) -> Float[Array, ""]:
        cx = self.nlp.cons(x)
        return self.nlp.obj(x) - jnp.dot(self.y, cx) + 0.5 * self.mu * jnp.dot(cx, cx)

    def grad(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        cx = self.nlp.cons(x)
        return self.nlp.grad(x) + self.nlp.jtprod(x, self.mu * cx - self.y)

    def hvp(self, x: Float[Array, " n"], v: Float[Array, " n"]) -> Float[Array, " n"]:
        cx = self.nlp.cons(x)
        # Second-order constraint terms use the shifted multipliers y - mu c(x)
        hv = self.nlp.hprod(x, self.y - self.mu * cx, v)
        # Gauss-Newton term of the quadratic penalty
        return hv + self.mu * self.nlp.jtprod(x, self.nlp.jprod(x, v))

    def dual_feasibility(self, x: Float[Array, " n"]) -> Float[Array, " n"]:
        """Gradient of the Lagrangian nabla f(x) - J(x)^T y at the current y."""
        return self.nlp.grad(x) - self.nlp.jtprod(x, self.y)
