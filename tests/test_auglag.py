"""Tests for the augmented Lagrangian outer loop."""

import logging

import jax
import jax.numpy as jnp
import numpy as np
import pytest
from scipy.optimize import minimize as scipy_minimize

import auglag_jax.auglag as auglag_module
from auglag_jax import (
    ALStatus,
    NLPModel,
    TronStatus,
    al,
    least_squares_multipliers,
    termination_status,
    tron,
    update_parameters,
)

# Enable 64-bit precision for numerical accuracy
jax.config.update("jax_enable_x64", True)


def sum_of_squares(x, args):
    return jnp.sum(x**2)


def _record(iterates):
    def callback(iterate):
        iterates.append(iterate)

    return callback


class TestUpdateParameters:
    def test_accept_updates_multipliers(self):
        y, mu, eta = update_parameters(
            jnp.array([1.0]), 10.0, 0.5, jnp.array([0.01]), 0.01
        )
        np.testing.assert_allclose(y, [0.9])
        assert mu == 10.0
        np.testing.assert_allclose(eta, 0.5 / 10.0**0.9)

    def test_reject_increases_penalty(self):
        y, mu, eta = update_parameters(
            jnp.array([1.0]), 10.0, 0.5, jnp.array([1.0]), 1.0
        )
        np.testing.assert_array_equal(y, [1.0])
        assert mu == 1000.0
        np.testing.assert_allclose(eta, 1.0 / 1000.0**0.1)

    def test_violation_equal_to_eta_is_accepted(self):
        _, mu, _ = update_parameters(
            jnp.array([0.0]), 10.0, 0.5, jnp.array([0.5]), 0.5
        )
        assert mu == 10.0


class TestTerminationStatus:
    def test_solved_wins_over_budgets(self):
        status = termination_status(True, 10, 100.0, 100, 5, 1.0, 1)
        assert status == ALStatus.FIRST_ORDER

    def test_time_wins_over_iterations(self):
        status = termination_status(False, 10, 100.0, 0, 5, 1.0, -1)
        assert status == ALStatus.MAX_TIME

    def test_iterations_win_over_evaluations(self):
        status = termination_status(False, 5, 0.0, 100, 5, 1.0, 1)
        assert status == ALStatus.MAX_ITER

    def test_evaluation_budget(self):
        assert termination_status(False, 0, 0.0, 2, 5, 1.0, 1) == ALStatus.MAX_EVAL
        assert termination_status(False, 0, 0.0, 10**6, 5, 1.0, -1) is None

    def test_continue(self):
        assert termination_status(False, 4, 0.5, 1, 5, 1.0, 1) is None


class TestLeastSquaresMultipliers:
    def test_single_constraint(self):
        """J = [1, 1, 1], grad f = [2, 2, 2]  =>  y = 2"""
        y = least_squares_multipliers(jnp.array([[1.0, 1.0, 1.0]]), jnp.full(3, 2.0))
        np.testing.assert_allclose(y, [2.0], atol=1e-12)

    def test_matches_lstsq(self):
        rng = np.random.default_rng(0)
        J = rng.standard_normal((2, 5))
        g = rng.standard_normal(5)

        y = least_squares_multipliers(jnp.asarray(J), jnp.asarray(g))

        expected = np.linalg.lstsq(J.T, g, rcond=None)[0]
        np.testing.assert_allclose(y, expected, rtol=1e-10, atol=1e-12)

    def test_rank_deficient_gives_minimum_norm(self):
        """Duplicate constraint gradients split the multiplier evenly."""
        J = jnp.array([[1.0], [1.0]])
        y = least_squares_multipliers(J, jnp.array([2.0]))
        np.testing.assert_allclose(y, [1.0, 1.0], atol=1e-12)

    def test_zero_gradient(self):
        y = least_squares_multipliers(jnp.array([[1.0, 0.0]]), jnp.zeros(2))
        np.testing.assert_array_equal(y, [0.0])


class TestOptions:
    @pytest.mark.parametrize(
        "options", [{"max_iter": -1}, {"atol": -1.0}, {"rtol": -1e-3}]
    )
    def test_negative_options_rejected(self, options):
        nlp = NLPModel(sum_of_squares, jnp.ones(2))
        with pytest.raises(ValueError, match="non-negative"):
            al(nlp, **options)


class TestBoundConstrainedDispatch:
    def test_no_constraints_delegates_to_tron(self):
        """Without constraints al returns the TRON result with primal_feas 0."""
        target = jnp.array([2.0, -3.0, 0.5])

        def objective(x, args):
            return jnp.sum((x - target) ** 2)

        nlp = NLPModel(objective, jnp.zeros(3), lvar=jnp.zeros(3), uvar=jnp.ones(3))

        stats = al(nlp)
        direct = tron(nlp, atol=1e-7, rtol=1e-7)

        assert stats.status == TronStatus.FIRST_ORDER
        assert stats.primal_feas == 0.0
        assert stats.multipliers.shape == (0,)
        assert stats.iter == direct.iter
        np.testing.assert_allclose(stats.solution, direct.solution)
        np.testing.assert_allclose(stats.solution, [1.0, 0.0, 0.5], atol=1e-8)

    def test_budgets_are_forwarded(self):
        nlp = NLPModel(
            lambda x, args: (1 - x[0]) ** 2 + 100 * (x[1] - x[0] ** 2) ** 2,
            jnp.array([-1.2, 1.0]),
        )
        stats = al(nlp, max_iter=3)
        assert stats.status == TronStatus.MAX_ITER
        assert stats.iter == 3


class TestEqualityConstrained:
    def test_linear_equality(self):
        """minimize x0^2 + x1^2  s.t.  x0 + x1 = 1  =>  (0.5, 0.5), y = 1"""
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        iterates = []
        atol, rtol = 1e-7, 1e-7

        stats = al(nlp, atol=atol, rtol=rtol, callback=_record(iterates))

        assert stats.status == ALStatus.FIRST_ORDER
        np.testing.assert_allclose(stats.solution, [0.5, 0.5], atol=1e-7)
        np.testing.assert_allclose(stats.multipliers, [1.0], atol=1e-6)
        assert stats.primal_feas <= 1e-8
        assert stats.dual_feas <= atol + rtol * iterates[0].normgp
        assert iterates[0].iter == 0
        assert all(a.mu <= b.mu for a, b in zip(iterates, iterates[1:]))
        assert [it.iter for it in iterates] == list(range(stats.iter + 1))

    def test_initial_multipliers_are_least_squares(self):
        """y0 solves J(x0)^T y ~ grad f(x0): here (2 + 4) / 2 = 3."""
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        iterates = []
        al(nlp, max_iter=0, callback=_record(iterates))
        np.testing.assert_allclose(iterates[0].y, [3.0], atol=1e-10)
        assert iterates[0].mu == 10.0
        assert iterates[0].eta == 0.5

    def test_max_iter_zero_skips_subproblems(self, monkeypatch):
        def fail(*args, **kwargs):
            raise AssertionError("no subproblem should be solved")

        monkeypatch.setattr(auglag_module, "tron", fail)
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )

        stats = al(nlp, max_iter=0)

        assert stats.status == ALStatus.MAX_ITER
        assert stats.iter == 0
        np.testing.assert_array_equal(stats.solution, [1.0, 2.0])
        np.testing.assert_allclose(stats.primal_feas, 2.0)

    def test_inconsistent_constraints_grow_penalty(self):
        """c(x) = [x - 1, x - 2] can never vanish, so mu grows every iteration."""
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([0.0]),
            cons_fn=lambda x, args: jnp.array([x[0] - 1.0, x[0] - 2.0]),
            ncon=2,
        )
        iterates = []

        stats = al(nlp, max_iter=4, callback=_record(iterates))

        assert stats.status == ALStatus.MAX_ITER
        assert stats.iter == 4
        mus = [it.mu for it in iterates]
        np.testing.assert_allclose(mus, [10.0, 1e3, 1e5, 1e7, 1e9])
        for it in iterates[1:]:
            np.testing.assert_allclose(it.eta, 1.0 / it.mu**0.1)
            assert it.normcx > it.eta
        # Least violation is attained at x = 1.5
        np.testing.assert_allclose(stats.solution, [1.5], atol=1e-4)
        np.testing.assert_allclose(stats.primal_feas, np.sqrt(0.5), atol=1e-4)

    def test_evaluation_budget(self):
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        stats = al(nlp, max_eval=0)
        assert stats.status == ALStatus.MAX_EVAL
        assert stats.iter == 0

    def test_time_budget(self):
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        stats = al(nlp, max_time=-1.0)
        assert stats.status == ALStatus.MAX_TIME
        assert stats.iter == 0


class TestBoundsAndEqualities:
    def test_active_bound(self):
        """minimize x0^2 + x1^2  s.t.  x0 + x1 = 1, x1 <= 0.2  =>  (0.8, 0.2)"""
        lvar = jnp.array([-jnp.inf, -jnp.inf])
        uvar = jnp.array([jnp.inf, 0.2])
        nlp = NLPModel(
            sum_of_squares,
            jnp.zeros(2),
            lvar=lvar,
            uvar=uvar,
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        iterates = []

        stats = al(nlp, callback=_record(iterates))

        assert stats.status == ALStatus.FIRST_ORDER
        np.testing.assert_allclose(stats.solution, [0.8, 0.2], atol=1e-6)
        np.testing.assert_allclose(stats.multipliers, [1.6], atol=1e-5)
        for it in iterates:
            assert float(it.x[1]) <= 0.2
        # Both multiplier updates and penalty increases occur on this run
        pairs = list(zip(iterates, iterates[1:]))
        assert any(a.mu == b.mu for a, b in pairs)
        assert any(a.mu < b.mu for a, b in pairs)
        assert all(a.mu <= b.mu for a, b in pairs)

    def test_start_outside_bounds_is_projected(self):
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([5.0, 5.0]),
            lvar=jnp.array([0.0, 0.0]),
            uvar=jnp.array([1.0, 1.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        stats = al(nlp, max_iter=0)
        np.testing.assert_array_equal(stats.solution, [1.0, 1.0])


class TestAgainstScipy:
    def test_sum_of_squares_on_hyperplane(self):
        """minimize ||x||^2  s.t.  sum(x) = 3  =>  (1, 1, 1)"""

        def cons(x, args):
            return jnp.array([jnp.sum(x) - 3.0])

        x0 = np.array([2.0, 0.0, -1.0])
        nlp = NLPModel(sum_of_squares, jnp.asarray(x0), cons_fn=cons, ncon=1)

        stats = al(nlp)

        result_scipy = scipy_minimize(
            lambda x: np.sum(x**2),
            x0,
            method="SLSQP",
            constraints=[{"type": "eq", "fun": lambda x: np.sum(x) - 3.0}],
        )
        assert stats.status == ALStatus.FIRST_ORDER
        np.testing.assert_allclose(stats.solution, result_scipy.x, atol=1e-5)
        np.testing.assert_allclose(stats.solution, [1.0, 1.0, 1.0], atol=1e-6)

    @pytest.mark.slow
    def test_hs6(self):
        """minimize (1 - x0)^2  s.t.  10 (x1 - x0^2) = 0  =>  (1, 1)"""

        def objective(x, args):
            return (1.0 - x[0]) ** 2

        def cons(x, args):
            return jnp.array([10.0 * (x[1] - x[0] ** 2)])

        x0 = np.array([-1.2, 1.0])
        nlp = NLPModel(objective, jnp.asarray(x0), cons_fn=cons, ncon=1)

        stats = al(nlp)

        result_scipy = scipy_minimize(
            lambda x: (1.0 - x[0]) ** 2,
            x0,
            method="SLSQP",
            constraints=[{"type": "eq", "fun": lambda x: 10.0 * (x[1] - x[0] ** 2)}],
            options={"ftol": 1e-12, "maxiter": 500},
        )
        assert stats.status == ALStatus.FIRST_ORDER
        np.testing.assert_allclose(stats.solution, [1.0, 1.0], atol=1e-5)
        np.testing.assert_allclose(stats.solution, result_scipy.x, atol=1e-4)
        assert abs(stats.objective) < 1e-8


class TestLogging:
    def _nlp(self):
        return NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0]),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )

    def test_outer_rows_logged_inner_suppressed(self, caplog):
        with caplog.at_level(logging.INFO, logger="auglag_jax"):
            stats = al(self._nlp())

        names = {r.name for r in caplog.records}
        assert "auglag_jax.al" in names
        assert "auglag_jax.tron" not in names
        al_messages = [
            r.getMessage() for r in caplog.records if r.name == "auglag_jax.al"
        ]
        assert "normcx" in al_messages[0] and "eta" in al_messages[0]
        # header, initial row, one row per iteration
        assert len(al_messages) == stats.iter + 2
        assert not logging.getLogger("auglag_jax.tron").disabled

    def test_float32_problem_warns(self, caplog):
        nlp = NLPModel(
            sum_of_squares,
            jnp.array([1.0, 2.0], dtype=jnp.float32),
            cons_fn=lambda x, args: jnp.array([x[0] + x[1] - 1.0]),
            ncon=1,
        )
        with caplog.at_level(logging.WARNING, logger="auglag_jax"):
            al(nlp, max_iter=0)
        warnings = [r for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "jax_enable_x64" in warnings[0].getMessage()

    def test_float64_problem_does_not_warn(self, caplog):
        with caplog.at_level(logging.WARNING, logger="auglag_jax"):
            al(self._nlp(), max_iter=0)
        assert not [r for r in caplog.records if r.levelno == logging.WARNING]

    def test_summary(self):
        stats = al(self._nlp())
        summary = stats.summary()
        assert "first_order" in summary
        assert f"iterations:   {stats.iter}" in summary
