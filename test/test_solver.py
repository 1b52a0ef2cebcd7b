"""
Tests for the ConstraintSolver pipeline

- point at distance 50 and horizontal from a fixed point
- overconstrained perpendicular cycle, nothing committed
- line through a fixed point, tangent to a fixed circle
- angles that need more than a quarter turn
- cluster ordering, SKIPPED downstream clusters, cancellation
- parallel components, determinism, idempotence
- edits made while a solve runs are not overwritten
"""

import numpy as np
import pytest

from config.feature_flags import set_flag
from geosolver import (
    CancellationToken, ConstraintSet, ConstraintSolver, EntityStore, SolverOptions, SolveStatus,
    StaleHandleError, make_angle, make_coincident, make_distance, make_horizontal, make_on_curve, make_perpendicular,
    make_tangent,
)

pytestmark = [pytest.mark.solver, pytest.mark.fast]


@pytest.fixture
def solver() -> ConstraintSolver:
    return ConstraintSolver()


def _two_arms():
    """Two independent points at distance 10 from their own fixed points."""
    store = EntityStore()
    constraints = ConstraintSet(store)
    handles = []
    for offset in (0.0, 100.0):
        anchor = store.add_point2d(offset, 0, fixed=True)
        arm = store.add_point2d(offset + 7, 3)
        constraints.add(make_distance(anchor, arm, 10))
        constraints.add(make_horizontal(anchor, arm))
        handles.append(arm)
    return store, constraints, handles


class TestHorizontalDistance:
    def test_point_moves_to_solution(self, solver, store, constraints):
        p1 = store.add_point2d(0, 0, fixed=True)
        p2 = store.add_point2d(40, 10)
        constraints.add(make_distance(p1, p2, 50))
        constraints.add(make_horizontal(p1, p2))

        report = solver.solve(store, constraints)

        assert report.success
        result = report.for_entity(p2)
        assert result.status is SolveStatus.SOLVED
        assert result.committed
        assert result.residual_norm < 1e-9
        x, y = store.params(p2)
        assert abs(x) == pytest.approx(50, abs=1e-9)
        assert y == pytest.approx(0, abs=1e-9)
        np.testing.assert_allclose(store.params(p1), [0, 0])

    def test_chain_is_solved_in_order(self, solver, chain_sketch):
        store, constraints, (_, p2, p3) = chain_sketch
        report = solver.solve(store, constraints)
        assert report.success
        assert [r.cluster for r in report.clusters] == [0, 1]
        np.testing.assert_allclose(store.params(p2), [50, 0], atol=1e-9)
        np.testing.assert_allclose(store.params(p3), [50, 30], atol=1e-9)


class TestPerpendicularCycle:
    def test_perpendicular_cycle_is_reported(self, solver, store, constraints):
        l1 = store.add_line2d((0, 0), (1, 0), fixed=True)
        l2 = store.add_line2d((0, 0), (0.1, 1))
        l3 = store.add_line2d((0, 0), (1, 0.1))
        constraints.add(make_perpendicular(l1, l2))
        constraints.add(make_perpendicular(l2, l3))
        p13 = constraints.add(make_perpendicular(l1, l3))
        before = {h: store.params(h) for h in (l2, l3)}
        revision = store.revision

        report = solver.solve(store, constraints)

        assert not report.success
        result = report.for_constraint(p13.id)
        assert result.status is SolveStatus.OVERCONSTRAINED
        assert result.redundant == (p13.id,)
        assert result.relax_candidates == (p13.id,)
        assert result.implicated_constraints == (p13.id,)
        assert not result.committed
        assert store.revision == revision
        for h, params in before.items():
            np.testing.assert_array_equal(store.params(h), params)

    def test_without_diagnostics(self, solver, store, constraints):
        l1 = store.add_line2d((0, 0), (1, 0), fixed=True)
        l2 = store.add_line2d((0, 0), (0.1, 1))
        l3 = store.add_line2d((0, 0), (1, 0.1))
        constraints.add(make_perpendicular(l1, l2))
        constraints.add(make_perpendicular(l2, l3))
        constraints.add(make_perpendicular(l1, l3))
        report = solver.solve(store, constraints, diagnose=False)
        assert report.failed()[0].relax_candidates == ()
        assert report.failed()[0].diagnosis is None


class TestTangentThroughPoint:
    """Line through P(20, 0), tangent to the circle of radius 10 at the origin"""

    @pytest.fixture
    def tangent_setup(self, store, constraints):
        point = store.add_point2d(20, 0, fixed=True)
        circle = store.add_circle2d((0, 0), 10, fixed=True)
        return point, circle

    def _solve(self, solver, store, constraints, point, circle, start_direction):
        line = store.add_line2d((20, 0), start_direction)
        constraints.add(make_coincident(line, point))
        constraints.add(make_tangent(circle, line))
        report = solver.solve(store, constraints)
        params = store.params(line)
        return report, params[0:2], params[2:4] / np.linalg.norm(params[2:4])

    def test_upper_tangent(self, solver, store, constraints, tangent_setup):
        report, origin, d = self._solve(solver, store, constraints, *tangent_setup, (-1, 0.4))
        assert report.success
        np.testing.assert_allclose(origin, [20, 0], atol=1e-9)
        np.testing.assert_allclose(d, [-np.sqrt(3) / 2, 0.5], atol=1e-6)

    def test_lower_tangent(self, solver, store, constraints, tangent_setup):
        report, _, d = self._solve(solver, store, constraints, *tangent_setup, (-1, -0.4))
        assert report.success
        assert d[1] == pytest.approx(-0.5, abs=1e-6)


class TestLargeAngles:
    """Directions that have to turn by more than a quarter turn"""

    @pytest.mark.parametrize("degrees", [100, 150, -135])
    def test_line_turns_to_angle(self, solver, store, constraints, degrees):
        base = store.add_line2d((0, 0), (1, 0), fixed=True)
        pivot = store.add_point2d(0, 0, fixed=True)
        arm = store.add_line2d((0, 0), (1, 0.05))
        constraints.add(make_coincident(arm, pivot))
        constraints.add(make_angle(base, arm, degrees, unit="deg"))

        report = solver.solve(store, constraints)

        assert report.success
        assert report.for_entity(arm).status is SolveStatus.SOLVED
        d = store.params(arm)[2:4]
        angle = np.radians(degrees)
        np.testing.assert_allclose(d / np.linalg.norm(d), [np.cos(angle), np.sin(angle)], atol=1e-6)


class TestFailures:
    """Failures are statuses on the report, never exceptions, and never committed"""

    def test_unreachable_distances(self, solver, store, constraints):
        p1 = store.add_point2d(0, 0, fixed=True)
        p0 = store.add_point2d(200, 0, fixed=True)
        p2 = store.add_point2d(30, 40)
        constraints.add(make_distance(p1, p2, 50))
        constraints.add(make_distance(p0, p2, 50))

        report = solver.solve(store, constraints)

        result = report.for_entity(p2)
        assert not result.ok
        assert result.status in (SolveStatus.CONFLICTING, SolveStatus.NUMERICAL_FAILURE)
        assert not result.committed
        np.testing.assert_array_equal(store.params(p2), [30, 40])

    def test_failed_cluster_skips_downstream(self, solver, chain_sketch):
        store, constraints, (_, p2, p3) = chain_sketch
        report = solver.solve(store, constraints, max_iterations=1)
        first, second = report.clusters
        assert first.status is SolveStatus.NUMERICAL_FAILURE
        assert second.status is SolveStatus.SKIPPED
        np.testing.assert_array_equal(store.params(p2), [40, 10])
        np.testing.assert_array_equal(store.params(p3), [45, 25])

    def test_fixed_conflict(self, solver, store, constraints):
        p1 = store.add_point2d(0, 0, fixed=True)
        p2 = store.add_point2d(3, 4, fixed=True)
        ok = constraints.add(make_distance(p1, p2, 5))
        bad = constraints.add(make_horizontal(p1, p2))
        report = solver.solve(store, constraints)
        assert report.clusters == []
        assert report.inert == [ok.id]
        assert report.fixed_conflicts == [bad.id]
        assert not report.success

    def test_stale_handle(self, solver, chain_sketch):
        store, constraints, (_, _, p3) = chain_sketch
        store.remove_entity(p3)
        with pytest.raises(StaleHandleError):
            solver.solve(store, constraints)


class TestUnderconstrained:
    def test_partial_solution_is_committed(self, solver, store, constraints):
        p1 = store.add_point2d(0, 0, fixed=True)
        p2 = store.add_point2d(40, 10)
        constraints.add(make_distance(p1, p2, 50))
        report = solver.solve(store, constraints)
        result = report.for_entity(p2)
        assert report.success
        assert result.status is SolveStatus.UNDERCONSTRAINED
        assert result.remaining_dof == 1
        assert result.free_entities == (p2,)
        assert result.committed
        assert np.linalg.norm(store.params(p2)) == pytest.approx(50, abs=1e-9)

    def test_report_only(self, store, constraints):
        p1 = store.add_point2d(0, 0, fixed=True)
        p2 = store.add_point2d(40, 10)
        constraints.add(make_distance(p1, p2, 50))
        solver = ConstraintSolver(SolverOptions(solve_underconstrained=False))
        result = solver.solve(store, constraints).for_entity(p2)
        assert result.status is SolveStatus.UNDERCONSTRAINED
        assert not result.committed
        np.testing.assert_array_equal(store.params(p2), [40, 10])

    def test_floating_triangle(self, solver, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(4.2, 0.3)
        c = store.add_point2d(-0.2, 2.7)
        constraints.add(make_distance(a, b, 4))
        constraints.add(make_distance(b, c, 5))
        constraints.add(make_distance(c, a, 3))
        report = solver.solve(store, constraints)
        assert report.success
        assert report.clusters[0].remaining_dof == 3
        pa, pb, pc = (store.params(h) for h in (a, b, c))
        assert np.linalg.norm(pb - pa) == pytest.approx(4, abs=1e-9)
        assert np.linalg.norm(pc - pb) == pytest.approx(5, abs=1e-9)
        assert np.linalg.norm(pa - pc) == pytest.approx(3, abs=1e-9)


class TestScheduling:
    """Parallel components, cancellation, determinism"""

    def test_parallel_matches_sequential(self, solver):
        store, constraints, arms = _two_arms()
        parallel = solver.solve(store, constraints)
        set_flag("solver_parallel_clusters", False)
        store2, constraints2, arms2 = _two_arms()
        sequential = solver.solve(store2, constraints2)

        assert parallel.success and sequential.success
        assert [r.status for r in parallel.clusters] == [r.status for r in sequential.clusters]
        for h, h2 in zip(arms, arms2):
            np.testing.assert_array_equal(store.params(h), store2.params(h2))
        np.testing.assert_allclose(store.params(arms[1]), [110, 0], atol=1e-9)

    def test_cancelled_before_start(self, solver):
        store, constraints, arms = _two_arms()
        revision = store.revision
        token = CancellationToken()
        token.cancel()
        report = solver.solve(store, constraints, cancel_token=token)
        assert report.cancelled
        assert not report.success
        assert {r.status for r in report.clusters} == {SolveStatus.CANCELLED}
        assert store.revision == revision

    def test_deterministic(self, solver, chain_sketch):
        store, constraints, handles = chain_sketch
        clone = store.copy()
        solver.solve(store, constraints)
        solver.solve(clone, constraints)
        for h in handles:
            np.testing.assert_array_equal(store.params(h), clone.params(h))

    def test_resolve_is_idempotent(self, solver, chain_sketch):
        store, constraints, handles = chain_sketch
        solver.solve(store, constraints)
        solved = {h: store.params(h) for h in handles}
        report = solver.solve(store, constraints)
        assert report.success
        assert all(r.iterations <= 1 for r in report.clusters)
        for h in handles:
            np.testing.assert_allclose(store.params(h), solved[h], atol=1e-12)

    def test_commit_disabled(self, solver, chain_sketch):
        store, constraints, (_, p2, _) = chain_sketch
        revision = store.revision
        report = solver.solve(store, constraints, commit=False)
        assert report.success
        assert store.revision == revision
        np.testing.assert_allclose(report.for_entity(p2).params[p2], [50, 0], atol=1e-9)


class TestReport:
    def test_to_dict_and_summary(self, solver, chain_sketch):
        store, constraints, _ = chain_sketch
        report = solver.solve(store, constraints)
        data = report.to_dict()
        assert data["success"] is True
        assert [c["status"] for c in data["clusters"]] == ["solved", "solved"]
        assert data["revision"] == store.revision
        assert report.summary().startswith("2 clusters: solved=2")
        assert report.status_counts() == {"solved": 2}


class _EditsDuringSolve:
    """Circle curve evaluator that moves an entity the first time the solver calls it."""

    def __init__(self, store, handle, params):
        self.store = store
        self.handle = handle
        self.params = params
        self.edited = False

    def evaluate(self, curve_id, u):
        if not self.edited:
            self.edited = True
            self.store.move_entity(self.handle, self.params)
        return (10 * np.cos(u), 10 * np.sin(u)), (-np.sin(u), np.cos(u))


class TestConcurrentEdits:
    def test_edit_made_during_solve_wins(self, store, constraints):
        anchor = store.add_point2d(0, 0, fixed=True)
        p = store.add_point2d(9, 1)
        u = store.add_scalar(0.1)
        constraints.add(make_on_curve(p, u, "rim"))
        constraints.add(make_horizontal(anchor, p))
        kernel = _EditsDuringSolve(store, p, [3, 4])

        report = ConstraintSolver(kernel=kernel).solve(store, constraints)

        assert kernel.edited
        result = report.for_entity(p)
        assert result.status is SolveStatus.SOLVED
        assert not result.committed
        assert any("edited during the solve" in note for note in result.notes)
        np.testing.assert_array_equal(store.params(p), [3, 4])
