"""Result record returned by the auglag-jax solvers."""

from typing import NamedTuple, Union

from jaxtyping import Array, Float

from auglag_jax.types import ALStatus, TronStatus


class ExecutionStats(NamedTuple):
    """Final state of a solve.

    Attributes:
        status: Termination status. The augmented Lagrangian path reports an
            ALStatus, the bound-constrained path a TronStatus.
        solution: Final point.
        objective: Objective value f(solution).
        dual_feas: Norm of the projected Lagrangian gradient at the solution.
        primal_feas: Norm of the constraint violation (0.0 without constraints).
        iter: Number of iterations performed.
        elapsed_time: Wall-clock time in seconds.
        multipliers: Final Lagrange multiplier estimate (empty without
            constraints).
        num_evals: Number of objective evaluations, inner solves included.
    """

    status: Union[ALStatus, TronStatus]
    solution: Float[Array, " n"]
    objective: float
    dual_feas: float
    primal_feas: float
    iter: int
    elapsed_time: float
    multipliers: Float[Array, " m"]
    num_evals: int

    def summary(self) -> str:
        """Return a human-readable multi-line summary."""
        return "\n".join(
            [
                f"status:       {self.status.value}",
                f"objective:    {self.objective:.8e}",
                f"dual feas:    {self.dual_feas:.2e}",
                f"primal feas:  {self.primal_feas:.2e}",
                f"iterations:   {self.iter}",
                f"evaluations:  {self.num_evals}",
                f"elapsed time: {self.elapsed_time:.3f}s",
            ]
        )
