"""
Tests for the IncrementalSolveController

- a drag frame matches a full solve with the dragged entity held in place
- only components adjacent to the dragged entity are touched
- lines and circles are held by their anchor only
- a failed frame leaves the store at the last good configuration
- background full solves are cancelled by the next drag
"""

import numpy as np
import pytest

from geosolver import (
    BackgroundSolve, ConstraintSolver, EntityFixedError, IncrementalSolveController, SolveStatus,
    make_coincident, make_distance, make_horizontal, make_point_on_circle, make_tangent,
)

pytestmark = [pytest.mark.solver, pytest.mark.fast]


@pytest.fixture
def rod(store, constraints):
    """Two free points joined by a horizontal rod of length 10, plus an unrelated free point."""
    a = store.add_point2d(0, 0)
    b = store.add_point2d(10, 0)
    lone = store.add_point2d(-5, -5)
    constraints.add(make_distance(a, b, 10))
    constraints.add(make_horizontal(a, b))
    return a, b, lone


@pytest.fixture
def controller(store, constraints):
    ctl = IncrementalSolveController(store, constraints)
    yield ctl
    ctl.close()


class TestDrag:
    def test_matches_full_solve_with_pinned_entity(self, store, constraints, controller, rod):
        a, b, _ = rod
        reference = store.copy()
        reference.move_entity(a, [5, 5])
        reference.set_fixed(a, True)
        ConstraintSolver().solve(reference, constraints)

        result = controller.drag(a, (5, 5))

        assert result.success
        assert result.committed
        np.testing.assert_allclose(store.params(a), [5, 5])
        np.testing.assert_allclose(store.params(b), reference.params(b), atol=1e-8)
        assert np.linalg.norm(store.params(b) - store.params(a)) == pytest.approx(10, abs=1e-8)
        assert not store.is_fixed(a)

    def test_unrelated_component_untouched(self, store, controller, rod):
        a, _, lone = rod
        result = controller.drag(a, (1, 2))
        assert result.success
        assert all(lone not in r.entities for r in result.report.clusters)
        np.testing.assert_array_equal(store.params(lone), [-5, -5])

    def test_drag_to(self, store, controller, rod):
        a, b, _ = rod
        result = controller.drag_to(a, (3, -4))
        assert result.success
        np.testing.assert_allclose(store.params(a), [3, -4])
        assert store.params(b)[1] == pytest.approx(-4, abs=1e-8)

    def test_attempts_are_counted(self, controller, rod):
        a, _, _ = rod
        first = controller.drag(a, (1, 0))
        second = controller.drag(a, (1, 0))
        assert (first.attempt, second.attempt) == (1, 2)
        assert controller.attempts == 2

    def test_fixed_entity_cannot_be_dragged(self, store, controller):
        p = store.add_point2d(0, 0, fixed=True)
        with pytest.raises(EntityFixedError):
            controller.drag(p, (1, 1))

    def test_delta_length_is_checked(self, controller, rod):
        a, _, _ = rod
        with pytest.raises(ValueError):
            controller.drag(a, (1, 2, 3))



class TestDragHoldsAnchorOnly:
    """Dragging a line or circle moves its anchor; direction and radius stay free"""

    def test_line_stays_tangent_to_fixed_circle(self, store, constraints, controller):
        circle = store.add_circle2d((0, 0), 10, fixed=True)
        line = store.add_line2d((0, 10), (1, 0))
        constraints.add(make_tangent(circle, line))

        result = controller.drag(line, (0.5, 0.3))

        assert result.success
        assert result.committed
        params = store.params(line)
        np.testing.assert_allclose(params[0:2], [0.5, 10.3], atol=1e-9)
        d = params[2:4] / np.linalg.norm(params[2:4])
        assert abs(d[0] * params[1] - d[1] * params[0]) == pytest.approx(10, abs=1e-8)
        assert len(constraints.active()) == 1

    def test_circle_radius_follows_center(self, store, constraints, controller):
        rim = store.add_point2d(5, 0, fixed=True)
        circle = store.add_circle2d((0, 0), 5)
        constraints.add(make_point_on_circle(rim, circle))

        result = controller.drag_to(circle, (1, 0))

        assert result.success
        np.testing.assert_allclose(store.params(circle), [1, 0, 4], atol=1e-8)

class TestFailedFrame:
    def test_store_keeps_last_good_configuration(self, store, constraints, controller):
        p1 = store.add_point2d(0, 0, fixed=True)
        p2 = store.add_point2d(40, 10)
        p3 = store.add_point2d(40, 10)
        constraints.add(make_distance(p1, p2, 50))
        constraints.add(make_horizontal(p1, p2))
        constraints.add(make_coincident(p2, p3))
        before = {h: store.params(h) for h in (p2, p3)}
        revision = store.revision

        result = controller.drag(p3, (2, 2))

        assert not result.success
        assert not result.committed
        assert result.attempt == 1
        assert result.failed_clusters[0].status is SolveStatus.OVERCONSTRAINED
        assert store.revision == revision
        for h, params in before.items():
            np.testing.assert_array_equal(store.params(h), params)


class TestBackgroundSolve:
    def test_full_solve_in_background(self, store, controller, rod):
        a, b, _ = rod
        store.move_entity(b, [8, 3])
        pending = controller.solve_all(background=True)
        assert isinstance(pending, BackgroundSolve)
        report = pending.result(timeout=30)
        assert report.success
        assert pending.done()
        assert store.params(b)[1] == pytest.approx(store.params(a)[1], abs=1e-8)

    def test_drag_cancels_pending_solve(self, controller, rod):
        a, _, _ = rod
        pending = controller.solve_all(background=True)
        result = controller.drag(a, (1, 1))
        assert pending.done()
        assert result.success

    def test_foreground_full_solve(self, controller, rod):
        report = controller.solve_all()
        assert report.success
