"""
Tests for the Constraint Registry

- validation against the entity store (arity, types, dimensions, handles)
- residual values of the individual kinds
- closed-form Jacobians against central finite differences
"""

import math

import numpy as np
import pytest

from config.feature_flags import set_flag
from geosolver import (
    AngleUnit, ConstraintDefinitionError, ConstraintKind, EntityType, StaleHandleError,
    make_angle, make_arc_endpoint, make_coincident, make_concentric, make_distance, make_equal_radius,
    make_fixed, make_horizontal, make_parallel, make_perpendicular, make_point_on_circle,
    make_point_on_line, make_point_on_plane, make_radius, make_symmetric, make_tangent, make_vertical,
)
from geosolver.constraints import EvalContext, kind_spec
from geosolver.system import ClusterSystem

pytestmark = [pytest.mark.solver, pytest.mark.fast]


def _residual(store, c, ctx=None):
    return c.residual([store.params(h) for h in c.entities], [store.type_of(h) for h in c.entities], ctx)


class TestValidation:
    """ConstraintSet.add checks"""

    def test_wrong_entity_types(self, store, constraints):
        p = store.add_point2d(0, 0)
        with pytest.raises(ConstraintDefinitionError):
            constraints.add(make_radius(p, 5))

    def test_mixed_dimensions(self, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point3d(0, 0, 0)
        with pytest.raises(ConstraintDefinitionError):
            constraints.add(make_coincident(a, b))

    def test_same_entity_twice(self, store, constraints):
        a = store.add_point2d(0, 0)
        with pytest.raises(ConstraintDefinitionError):
            constraints.add(make_coincident(a, a))

    def test_stale_handle(self, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(1, 0)
        store.remove_entity(b)
        with pytest.raises(StaleHandleError):
            constraints.add(make_coincident(a, b))

    def test_negative_distance(self, store):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(1, 0)
        with pytest.raises(ConstraintDefinitionError):
            make_distance(a, b, -1)

    def test_zero_radius(self, store):
        c = store.add_circle2d((0, 0), 1)
        with pytest.raises(ConstraintDefinitionError):
            make_radius(c, 0)

    def test_duplicate_id(self, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(1, 0)
        first = constraints.add(make_coincident(a, b))
        second = make_coincident(a, b)
        second.id = first.id
        with pytest.raises(ConstraintDefinitionError):
            constraints.add(second)

    def test_creation_order(self, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(1, 0)
        c1 = constraints.add(make_horizontal(a, b))
        c2 = constraints.add(make_distance(a, b, 3))
        assert [c.id for c in constraints] == [c1.id, c2.id]
        assert c1.sequence < c2.sequence

    def test_purge_entity(self, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(1, 0)
        c = store.add_point2d(2, 0)
        constraints.add(make_horizontal(a, b))
        keep = constraints.add(make_vertical(b, c))
        removed = constraints.purge_entity(a)
        assert len(removed) == 1
        assert [x.id for x in constraints] == [keep.id]

    def test_disabled_constraints_are_inactive(self, store, constraints):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(1, 0)
        c = constraints.add(make_horizontal(a, b))
        c.enabled = False
        assert constraints.active() == []


class TestResiduals:
    """Residual values of single constraints"""

    def test_fixed_defaults_to_current_anchor(self, store, constraints):
        p = store.add_point2d(3, 4)
        c = constraints.add(make_fixed(p))
        assert c.params["position"] == [3.0, 4.0]
        np.testing.assert_allclose(_residual(store, c), [0, 0])

    def test_point_distance(self, store):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(3, 4)
        np.testing.assert_allclose(_residual(store, make_distance(a, b, 2)), [3])

    def test_distance_line_first_is_swapped(self, store, constraints):
        line = store.add_line2d((0, 0), (1, 0))
        p = store.add_point2d(2, 3)
        c = constraints.add(make_distance(line, p, 3))
        assert c.entities == (p, line)
        np.testing.assert_allclose(_residual(store, c), [0], atol=1e-12)

    def test_distance_point_plane(self, store, constraints):
        plane = store.add_plane3d((0, 0, 1), (0, 0, 2))
        p = store.add_point3d(5, 5, 4)
        c = constraints.add(make_distance(p, plane, 2))
        np.testing.assert_allclose(_residual(store, c), [1], atol=1e-12)

    def test_distance_point_axis_zero_has_two_rows(self, store, constraints):
        axis = store.add_axis3d((0, 0, 0), (0, 0, 1))
        p = store.add_point3d(1, 2, 7)
        c = constraints.add(make_distance(p, axis, 0))
        assert c.rows([EntityType.POINT3D, EntityType.AXIS3D]) == 2
        assert np.linalg.norm(_residual(store, c)) == pytest.approx(math.sqrt(5))

    def test_angle_in_degrees(self, store, constraints):
        a = store.add_line2d((0, 0), (1, 0))
        b = store.add_line2d((0, 0), (1, 1))
        c = constraints.add(make_angle(a, b, 45, unit=AngleUnit.DEGREES))
        assert c.params["value"] == pytest.approx(math.pi / 4)
        np.testing.assert_allclose(_residual(store, c), [0], atol=1e-12)

    def test_angle_unit_as_string(self, store):
        a = store.add_line2d((0, 0), (1, 0))
        b = store.add_line2d((0, 0), (0, 1))
        assert make_angle(a, b, 90, unit="degrees").params["value"] == pytest.approx(math.pi / 2)

    def test_unknown_angle_unit(self, store):
        a = store.add_line2d((0, 0), (1, 0))
        b = store.add_line2d((0, 0), (0, 1))
        with pytest.raises(ConstraintDefinitionError):
            make_angle(a, b, 90, unit="gradians")

    def test_parallel_and_perpendicular(self, store):
        a = store.add_line2d((0, 0), (2, 0))
        b = store.add_line2d((5, 5), (-3, 0))
        c = store.add_line2d((5, 5), (0, 4))
        np.testing.assert_allclose(_residual(store, make_parallel(a, b)), [0], atol=1e-12)
        np.testing.assert_allclose(_residual(store, make_perpendicular(a, c)), [0], atol=1e-12)

    def test_parallel_3d_has_two_rows(self, store):
        a = store.add_axis3d((0, 0, 0), (0, 0, 1))
        b = store.add_axis3d((1, 0, 0), (0, 1, 1))
        c = make_parallel(a, b)
        assert c.rows([EntityType.AXIS3D, EntityType.AXIS3D]) == 2
        assert np.linalg.norm(_residual(store, c)) == pytest.approx(math.sqrt(0.5))

    def test_tangent_line_first_is_swapped(self, store, constraints):
        line = store.add_line2d((0, 10), (1, 0))
        circle = store.add_circle2d((0, 0), 10)
        c = constraints.add(make_tangent(line, circle))
        assert c.entities == (circle, line)
        np.testing.assert_allclose(_residual(store, c), [0], atol=1e-12)

    def test_tangent_circles(self, store):
        a = store.add_circle2d((0, 0), 3)
        b = store.add_circle2d((5, 0), 2)
        inner = store.add_circle2d((1, 0), 2)
        np.testing.assert_allclose(_residual(store, make_tangent(a, b)), [0], atol=1e-12)
        np.testing.assert_allclose(_residual(store, make_tangent(a, inner, internal=True)), [0], atol=1e-12)

    def test_incidence(self, store):
        p = store.add_point2d(3, 3)
        line = store.add_line2d((0, 0), (1, 1))
        circle = store.add_circle2d((0, 3), 3)
        plane = store.add_plane3d((0, 0, 0), (0, 0, 1))
        q = store.add_point3d(4, 4, 0)
        np.testing.assert_allclose(_residual(store, make_point_on_line(p, line)), [0], atol=1e-12)
        np.testing.assert_allclose(_residual(store, make_point_on_circle(p, circle)), [0], atol=1e-12)
        np.testing.assert_allclose(_residual(store, make_point_on_plane(q, plane)), [0], atol=1e-12)

    def test_arc_endpoint(self, store):
        arc = store.add_arc2d((0, 0), 2, 0.0, math.pi / 2)
        start = store.add_point2d(2, 0)
        end = store.add_point2d(0, 2)
        np.testing.assert_allclose(_residual(store, make_arc_endpoint(start, arc, "start")), [0, 0], atol=1e-12)
        np.testing.assert_allclose(_residual(store, make_arc_endpoint(end, arc, "end")), [0, 0], atol=1e-12)
        with pytest.raises(ConstraintDefinitionError):
            make_arc_endpoint(end, arc, "middle")

    def test_symmetric(self, store):
        a = store.add_point2d(-2, 5)
        b = store.add_point2d(2, 5)
        axis = store.add_line2d((0, 0), (0, 1))
        np.testing.assert_allclose(_residual(store, make_symmetric(a, b, axis)), [0, 0], atol=1e-12)

    def test_override_replaces_constant(self, store):
        a = store.add_point2d(0, 0)
        b = store.add_point2d(3, 4)
        c = make_distance(a, b, 2)
        ctx = EvalContext(overrides={c.id: {"value": 5.0}})
        np.testing.assert_allclose(_residual(store, c, ctx), [0], atol=1e-12)


class TestClosedFormJacobians:
    """Closed-form Jacobian blocks agree with central finite differences"""

    def _compare(self, store, c):
        free = list(c.entities)
        values = {h: store.params(h) for h in free}
        types = {h: store.type_of(h) for h in free}
        system = ClusterSystem([c], free, values, types)
        x = system.x0()
        assert c.spec.jacobian is not None
        closed = system.jacobian(x)
        set_flag("solver_closed_form_jacobians", False)
        numeric = system.jacobian(x)
        np.testing.assert_allclose(closed, numeric, atol=1e-5)

    def test_fixed(self, store):
        self._compare(store, make_fixed(store.add_point2d(1, 2), [0, 0]))

    def test_coincident(self, store):
        self._compare(store, make_coincident(store.add_point2d(1, 2), store.add_circle2d((3, 1), 2)))

    def test_point_distance(self, store):
        self._compare(store, make_distance(store.add_point3d(1, 2, 3), store.add_point3d(-1, 0, 4), 2))

    def test_horizontal_line(self, store):
        self._compare(store, make_horizontal(store.add_line2d((0, 0), (3, 1))))

    def test_vertical_line(self, store):
        self._compare(store, make_vertical(store.add_line2d((0, 0), (0.5, 2))))

    def test_horizontal_points(self, store):
        self._compare(store, make_horizontal(store.add_point2d(0, 1), store.add_point2d(4, 2)))

    def test_radius(self, store):
        self._compare(store, make_radius(store.add_arc2d((0, 0), 2, 0, 1), 3))

    def test_equal_radius(self, store):
        self._compare(store, make_equal_radius(store.add_circle2d((0, 0), 2), store.add_arc2d((1, 1), 3, 0, 1)))

    def test_concentric(self, store):
        self._compare(store, make_concentric(store.add_circle2d((0, 0), 2), store.add_circle2d((1, 1), 3)))

    def test_arc_endpoint(self, store):
        arc = store.add_arc2d((1, 0), 2, 0.3, 2.0)
        self._compare(store, make_arc_endpoint(store.add_point2d(0, 1), arc, "end"))


def test_every_kind_is_registered():
    for kind in ConstraintKind:
        assert kind_spec(kind).kind is kind
