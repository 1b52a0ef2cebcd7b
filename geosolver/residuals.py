"""
Residual functions of the geometric constraint kinds.

All residuals are signed and smooth near their solutions, in document units
(lengths) or radians (angles). Kinds with a simple closed-form derivative
also provide a Jacobian; every other kind is differentiated numerically by
the cluster system.

This module registers its kinds with the constraint registry on import.
"""

import math
from typing import List

import numpy as np

from .constraints import (
    Constraint, ConstraintDefinitionError, ConstraintKind, EvalContext, KindSpec, register_kind,
)
from .geometry import (
    ANCHORED_TYPES, CIRCULAR_TYPES, DIRECTIONAL_TYPES, EntityType,
    anchor, arc_point, cross2, direction, layout, orthonormal_basis, unit, wrap_angle,
)
from .kernel import evaluate_curve

A2 = frozenset(t for t in ANCHORED_TYPES if layout(t).dim == 2)
A3 = frozenset(t for t in ANCHORED_TYPES if layout(t).dim == 3)
ANCH = ANCHORED_TYPES
LINEAR = frozenset({EntityType.LINE2D, EntityType.AXIS3D})
PLANE = frozenset({EntityType.PLANE3D})
CIRC = CIRCULAR_TYPES
LINE2 = frozenset({EntityType.LINE2D})
ARC = frozenset({EntityType.ARC2D})
SCALAR = frozenset({EntityType.SCALAR})


def _anchor_rows(etype: EntityType, block: np.ndarray) -> np.ndarray:
    """Embeds a (rows x dim) block into the anchor columns of an entity."""
    lay = layout(etype)
    lo, hi = lay.anchor
    jac = np.zeros((block.shape[0], lay.size))
    jac[:, lo:hi] = block
    return jac


def _groups(*names):
    frozen = frozenset(names)
    return lambda c, types: frozen


def _one(c, types):
    return 1


def _dim(c, types):
    return layout(types[0]).dim


def _codim(c, types):
    return layout(types[0]).dim - 1


def _parallel_rows(c, types):
    return 1 if layout(types[0]).dim == 2 else 2


# =============================================================================
# Placement
# =============================================================================

def _fixed_prepare(c: Constraint, types, values):
    dim = layout(types[0]).dim
    if c.params.get("position") is None:
        c.params["position"] = anchor(types[0], values[0]).tolist()
    if len(c.params["position"]) != dim:
        raise ConstraintDefinitionError(f"FIXED position needs {dim} coordinates")


def _fixed_residual(c, values, types, ctx):
    return anchor(types[0], values[0]) - np.asarray(c.params["position"], dtype=float)


def _fixed_jacobian(c, values, types, ctx):
    return [_anchor_rows(types[0], np.eye(layout(types[0]).dim))]


def _coincident_residual(c, values, types, ctx):
    return anchor(types[0], values[0]) - anchor(types[1], values[1])


def _coincident_jacobian(c, values, types, ctx):
    eye = np.eye(layout(types[0]).dim)
    return [_anchor_rows(types[0], eye), _anchor_rows(types[1], -eye)]


def _distance_mode(types) -> str:
    if types[1] in LINEAR:
        return "line"
    if types[1] in PLANE:
        return "plane"
    return "point"


def _distance_prepare(c: Constraint, types, values):
    linear = LINEAR | PLANE
    if types[0] in linear and types[1] not in linear:
        c.entities = (c.entities[1], c.entities[0])


def _distance_rows(c, types):
    if _distance_mode(types) == "line" and layout(types[1]).dim == 3 and c.params.get("value") == 0:
        return 2
    return 1


def _on_line_3d(w: np.ndarray, d: np.ndarray) -> List[float]:
    u, v = orthonormal_basis(d)
    return [float(np.dot(w, u)), float(np.dot(w, v))]


def _distance_residual(c, values, types, ctx: EvalContext):
    target = ctx.value(c, "value")
    p = anchor(types[0], values[0])
    mode = _distance_mode(types)
    if mode == "point":
        return [np.linalg.norm(p - anchor(types[1], values[1])) - target]
    w = p - anchor(types[1], values[1])
    d = direction(types[1], values[1])
    if mode == "plane":
        s = float(np.dot(w, d))
    elif len(p) == 2:
        s = cross2(d, w)
    elif target == 0:
        return _on_line_3d(w, d)
    else:
        return [np.linalg.norm(w - np.dot(w, d) * d) - target]
    # signed form at zero distance keeps the residual differentiable
    return [abs(s) - target if target > 0 else s]


def _distance_jacobian(c, values, types, ctx):
    if _distance_mode(types) != "point":
        return None
    u = unit(anchor(types[0], values[0]) - anchor(types[1], values[1]))[None, :]
    return [_anchor_rows(types[0], u), _anchor_rows(types[1], -u)]


def _axis_aligned(axis: int):
    """HORIZONTAL (axis=1) / VERTICAL (axis=0): zero component along `axis`."""
    other = 1 - axis

    def residual(c, values, types, ctx):
        if len(types) == 1:
            return [direction(types[0], values[0])[axis]]
        return [anchor(types[0], values[0])[axis] - anchor(types[1], values[1])[axis]]

    def jacobian(c, values, types, ctx):
        if len(types) == 1:
            d = values[0][2:4]
            n3 = float(np.linalg.norm(d)) ** 3
            jac = np.zeros((1, 4))
            jac[0, 2 + axis] = d[other] ** 2 / n3
            jac[0, 2 + other] = -d[0] * d[1] / n3
            return [jac]
        e = np.zeros((1, 2))
        e[0, axis] = 1.0
        return [_anchor_rows(types[0], e), _anchor_rows(types[1], -e)]

    def groups(c, types):
        return frozenset({"rot"}) if len(types) == 1 else frozenset({"pos"})

    return residual, jacobian, groups


# =============================================================================
# Orientation
# =============================================================================

def _parallel_residual(c, values, types, ctx):
    d1 = direction(types[0], values[0])
    d2 = direction(types[1], values[1])
    if len(d1) == 2:
        return [cross2(d1, d2)]
    u, w = orthonormal_basis(d1)
    return [np.dot(d2, u), np.dot(d2, w)]


def _perpendicular_residual(c, values, types, ctx):
    return [np.dot(direction(types[0], values[0]), direction(types[1], values[1]))]


def _angle_residual(c, values, types, ctx: EvalContext):
    target = ctx.value(c, "value")
    d1 = direction(types[0], values[0])
    d2 = direction(types[1], values[1])
    if len(d1) == 2:
        return [wrap_angle(math.atan2(cross2(d1, d2), float(np.dot(d1, d2))) - target)]
    return [math.atan2(float(np.linalg.norm(np.cross(d1, d2))), float(np.dot(d1, d2))) - target]


# =============================================================================
# Circles, arcs and incidence
# =============================================================================

def _tangent_prepare(c: Constraint, types, values):
    if types[0] in LINE2 and types[1] in CIRC:
        c.entities = (c.entities[1], c.entities[0])


def _tangent_residual(c, values, types, ctx):
    center, r1 = values[0][0:2], values[0][2]
    if types[1] in LINE2:
        s = cross2(direction(types[1], values[1]), center - values[1][0:2])
        return [abs(s) - r1]
    dist = np.linalg.norm(center - values[1][0:2])
    r2 = values[1][2]
    if c.params.get("internal"):
        return [dist - abs(r1 - r2)]
    return [dist - (r1 + r2)]


def _point_on_line_residual(c, values, types, ctx):
    w = anchor(types[0], values[0]) - anchor(types[1], values[1])
    d = direction(types[1], values[1])
    if len(w) == 2:
        return [cross2(d, w)]
    return _on_line_3d(w, d)


def _point_on_plane_residual(c, values, types, ctx):
    w = anchor(types[0], values[0]) - anchor(types[1], values[1])
    return [np.dot(w, direction(types[1], values[1]))]


def _point_on_circle_residual(c, values, types, ctx):
    return [np.linalg.norm(anchor(types[0], values[0]) - values[1][0:2]) - values[1][2]]


def _radius_residual(c, values, types, ctx):
    return [values[0][2] - ctx.value(c, "value")]


def _radius_jacobian(c, values, types, ctx):
    jac = np.zeros((1, layout(types[0]).size))
    jac[0, 2] = 1.0
    return [jac]


def _equal_radius_residual(c, values, types, ctx):
    return [values[0][2] - values[1][2]]


def _equal_radius_jacobian(c, values, types, ctx):
    ja = np.zeros((1, layout(types[0]).size))
    jb = np.zeros((1, layout(types[1]).size))
    ja[0, 2] = 1.0
    jb[0, 2] = -1.0
    return [ja, jb]


def _arc_endpoint_residual(c, values, types, ctx):
    return anchor(types[0], values[0]) - arc_point(values[1], c.params.get("end", "start"))


def _arc_endpoint_jacobian(c, values, types, ctx):
    arc = values[1]
    col = 3 if c.params.get("end", "start") == "start" else 4
    angle, r = arc[col], arc[2]
    jarc = np.zeros((2, 5))
    jarc[:, 0:2] = -np.eye(2)
    jarc[:, 2] = [-math.cos(angle), -math.sin(angle)]
    jarc[:, col] = [r * math.sin(angle), -r * math.cos(angle)]
    return [_anchor_rows(types[0], np.eye(2)), jarc]


def _symmetric_residual(c, values, types, ctx):
    a = anchor(types[0], values[0])
    b = anchor(types[1], values[1])
    d = direction(types[2], values[2])
    mid = 0.5 * (a + b)
    return [cross2(d, mid - values[2][0:2]), np.dot(b - a, d)]


# =============================================================================
# Kernel curves
# =============================================================================

def _on_curve_residual(c, values, types, ctx: EvalContext):
    point, _ = evaluate_curve(ctx.kernel, c.params["curve_id"], values[1][0])
    return anchor(types[0], values[0]) - point


def _curve_tangent_residual(c, values, types, ctx: EvalContext):
    point, tangent = evaluate_curve(ctx.kernel, c.params["curve_id"], values[1][0])
    d = direction(types[0], values[0])
    return [cross2(d, point - values[0][0:2]), cross2(d, unit(tangent))]


# =============================================================================
# Registration
# =============================================================================

_horizontal = _axis_aligned(1)
_vertical = _axis_aligned(0)

for _spec in (
    KindSpec(ConstraintKind.FIXED, ((ANCH,),), _fixed_residual, _dim, _fixed_jacobian,
             _groups("pos"), grounds_translation=True, prepare=_fixed_prepare),
    KindSpec(ConstraintKind.COINCIDENT, ((ANCH, ANCH),), _coincident_residual, _dim, _coincident_jacobian,
             _groups("pos")),
    KindSpec(ConstraintKind.DISTANCE, ((ANCH, ANCH),), _distance_residual, _distance_rows, _distance_jacobian,
             lambda c, types: frozenset({"pos"}) if _distance_mode(types) == "point" else frozenset({"pos", "rot"}),
             required=("value",), prepare=_distance_prepare),
    KindSpec(ConstraintKind.HORIZONTAL, ((LINE2,), (A2, A2)), _horizontal[0], _one, _horizontal[1],
             _horizontal[2], orientation="absolute", grounds_rotation=True),
    KindSpec(ConstraintKind.VERTICAL, ((LINE2,), (A2, A2)), _vertical[0], _one, _vertical[1],
             _vertical[2], orientation="absolute", grounds_rotation=True),
    KindSpec(ConstraintKind.PARALLEL, ((DIRECTIONAL_TYPES, DIRECTIONAL_TYPES),), _parallel_residual,
             _parallel_rows, groups=_groups("rot"), orientation="relative"),
    KindSpec(ConstraintKind.PERPENDICULAR, ((DIRECTIONAL_TYPES, DIRECTIONAL_TYPES),), _perpendicular_residual,
             _one, groups=_groups("rot"), orientation="relative"),
    KindSpec(ConstraintKind.ANGLE, ((DIRECTIONAL_TYPES, DIRECTIONAL_TYPES),), _angle_residual,
             _one, groups=_groups("rot"), orientation="relative", required=("value",)),
    KindSpec(ConstraintKind.TANGENT, ((CIRC, LINE2), (CIRC, CIRC)), _tangent_residual, _one,
             groups=_groups("pos", "rot", "size"), prepare=_tangent_prepare),
    KindSpec(ConstraintKind.POINT_ON_LINE, ((A2, LINE2), (A3, frozenset({EntityType.AXIS3D}))),
             _point_on_line_residual, _codim, groups=_groups("pos", "rot")),
    KindSpec(ConstraintKind.POINT_ON_PLANE, ((A3, PLANE),), _point_on_plane_residual, _one,
             groups=_groups("pos", "rot")),
    KindSpec(ConstraintKind.POINT_ON_CIRCLE, ((A2, CIRC),), _point_on_circle_residual, _one,
             groups=_groups("pos", "size")),
    KindSpec(ConstraintKind.RADIUS, ((CIRC,),), _radius_residual, _one, _radius_jacobian,
             _groups("size"), required=("value",)),
    KindSpec(ConstraintKind.EQUAL_RADIUS, ((CIRC, CIRC),), _equal_radius_residual, _one,
             _equal_radius_jacobian, _groups("size")),
    KindSpec(ConstraintKind.CONCENTRIC, ((CIRC, CIRC),), _coincident_residual, _dim, _coincident_jacobian,
             _groups("pos")),
    KindSpec(ConstraintKind.ARC_ENDPOINT, ((A2, ARC),), _arc_endpoint_residual, _dim, _arc_endpoint_jacobian,
             _groups("pos", "size", "span")),
    KindSpec(ConstraintKind.SYMMETRIC, ((A2, A2, LINE2),), _symmetric_residual, lambda c, types: 2,
             groups=_groups("pos", "rot")),
    KindSpec(ConstraintKind.ON_CURVE, ((ANCH, SCALAR),), _on_curve_residual, _dim,
             groups=_groups("pos", "value"), required=("curve_id",)),
    KindSpec(ConstraintKind.CURVE_TANGENT, ((LINE2, SCALAR),), _curve_tangent_residual, lambda c, types: 2,
             groups=_groups("pos", "rot", "value"), required=("curve_id",)),
):
    register_kind(_spec)
