"""
GeoSolver - Entity geometry
===========================

Parameter layouts of the solver's geometric primitives.

Every entity is a flat float vector. Directions are stored unnormalized and
normalized on read, so a constraint on a direction never couples to its
length. The unused scale of a stored direction (and the component of a frame's
reference vector along its axis) is a *gauge* freedom: it changes the stored
numbers without changing the geometry. Gauge freedoms are excluded from the
DOF count and pinned during solving by linear gauge rows.

Layouts:
    POINT2D   (x, y)
    POINT3D   (x, y, z)
    LINE2D    (ox, oy, dx, dy)
    CIRCLE2D  (cx, cy, r)
    ARC2D     (cx, cy, r, start, end)          angles in radians
    AXIS3D    (ox, oy, oz, dx, dy, dz)
    PLANE3D   (ox, oy, oz, nx, ny, nz)
    FRAME3D   (ox, oy, oz, zx, zy, zz, rx, ry, rz)
    SCALAR    (u,)
"""

from dataclasses import dataclass
from enum import Enum
import math
from typing import Dict, List, Optional, Tuple

import numpy as np

from config.tolerances import Tolerances


class EntityType(Enum):
    """Geometric primitive types known to the solver."""
    POINT2D = "point2d"
    POINT3D = "point3d"
    LINE2D = "line2d"
    CIRCLE2D = "circle2d"
    ARC2D = "arc2d"
    AXIS3D = "axis3d"
    PLANE3D = "plane3d"
    FRAME3D = "frame3d"
    SCALAR = "scalar"


@dataclass(frozen=True)
class EntityLayout:
    """Static description of one entity type's parameter vector."""
    size: int
    dim: int                                   # 2, 3 or 0 for scalars
    groups: Tuple[Tuple[str, int], ...]        # (DOF group, capacity)
    anchor: Optional[Tuple[int, int]] = None   # slice of the anchor point
    directions: Tuple[Tuple[int, int], ...] = ()
    reference: Optional[Tuple[int, int]] = None  # frame reference vector

    @property
    def gauge(self) -> int:
        return len(self.directions) + (2 if self.reference else 0)

    @property
    def dof(self) -> int:
        return self.size - self.gauge


_LAYOUTS: Dict[EntityType, EntityLayout] = {
    EntityType.POINT2D: EntityLayout(2, 2, (("pos", 2),), anchor=(0, 2)),
    EntityType.POINT3D: EntityLayout(3, 3, (("pos", 3),), anchor=(0, 3)),
    EntityType.LINE2D: EntityLayout(4, 2, (("pos", 2), ("rot", 1)), anchor=(0, 2), directions=((2, 4),)),
    EntityType.CIRCLE2D: EntityLayout(3, 2, (("pos", 2), ("size", 1)), anchor=(0, 2)),
    EntityType.ARC2D: EntityLayout(5, 2, (("pos", 2), ("size", 1), ("span", 2)), anchor=(0, 2)),
    EntityType.AXIS3D: EntityLayout(6, 3, (("pos", 3), ("rot", 2)), anchor=(0, 3), directions=((3, 6),)),
    EntityType.PLANE3D: EntityLayout(6, 3, (("pos", 3), ("rot", 2)), anchor=(0, 3), directions=((3, 6),)),
    EntityType.FRAME3D: EntityLayout(
        9, 3, (("pos", 3), ("rot", 3)), anchor=(0, 3), directions=((3, 6),), reference=(6, 9)
    ),
    EntityType.SCALAR: EntityLayout(1, 0, (("value", 1),)),
}

# Entities whose direction defines an orientation usable by PARALLEL & co.
DIRECTIONAL_TYPES = frozenset({EntityType.LINE2D, EntityType.AXIS3D, EntityType.PLANE3D, EntityType.FRAME3D})
CIRCULAR_TYPES = frozenset({EntityType.CIRCLE2D, EntityType.ARC2D})
POINT_TYPES = frozenset({EntityType.POINT2D, EntityType.POINT3D})
ANCHORED_TYPES = frozenset(t for t, lay in _LAYOUTS.items() if lay.anchor is not None)


def layout(etype: EntityType) -> EntityLayout:
    return _LAYOUTS[etype]


def group_capacities(etype: EntityType) -> Dict[str, int]:
    return dict(_LAYOUTS[etype].groups)


def validate_params(etype: EntityType, params) -> np.ndarray:
    """Returns params as a float vector, raising ValueError on a bad shape."""
    values = np.array(params, dtype=float).reshape(-1)
    expected = _LAYOUTS[etype].size
    if values.shape[0] != expected:
        raise ValueError(f"{etype.value} expects {expected} parameters, got {values.shape[0]}")
    if not np.all(np.isfinite(values)):
        raise ValueError(f"{etype.value} parameters must be finite: {values.tolist()}")
    lay = _LAYOUTS[etype]
    for lo, hi in lay.directions:
        if np.linalg.norm(values[lo:hi]) < Tolerances.EPSILON_LENGTH:
            raise ValueError(f"{etype.value} direction must not be zero")
    if lay.reference is not None:
        z = values[3:6] / np.linalg.norm(values[3:6])
        ref = values[6:9]
        if np.linalg.norm(ref - np.dot(ref, z) * z) < Tolerances.EPSILON_LENGTH:
            raise ValueError(f"{etype.value} reference must not be parallel to its axis")
    return values


# =============================================================================
# Normalized reads
# =============================================================================

def unit(vec: np.ndarray) -> np.ndarray:
    """Normalizes a vector. A zero vector yields NaN so degeneracy is visible downstream."""
    n = float(np.linalg.norm(vec))
    if n < Tolerances.EPSILON_LENGTH:
        return np.full(vec.shape, np.nan)
    return vec / n


def cross2(a: np.ndarray, b: np.ndarray) -> float:
    return float(a[0] * b[1] - a[1] * b[0])


def wrap_angle(angle: float) -> float:
    """Wraps an angle into [-pi, pi)."""
    return (angle + math.pi) % (2.0 * math.pi) - math.pi


def anchor(etype: EntityType, values: np.ndarray) -> np.ndarray:
    lay = _LAYOUTS[etype]
    if lay.anchor is None:
        raise ValueError(f"{etype.value} has no anchor point")
    lo, hi = lay.anchor
    return values[lo:hi]


def direction(etype: EntityType, values: np.ndarray) -> np.ndarray:
    """Unit direction of a line/axis, the normal of a plane or the z axis of a frame."""
    lay = _LAYOUTS[etype]
    if not lay.directions:
        raise ValueError(f"{etype.value} has no direction")
    lo, hi = lay.directions[0]
    return unit(values[lo:hi])


def radius(etype: EntityType, values: np.ndarray) -> float:
    if etype not in CIRCULAR_TYPES:
        raise ValueError(f"{etype.value} has no radius")
    return float(values[2])


def arc_point(values: np.ndarray, end: str) -> np.ndarray:
    """Start or end point of an arc."""
    angle = values[3] if end == "start" else values[4]
    return values[0:2] + values[2] * np.array([math.cos(angle), math.sin(angle)])


def frame_axes(values: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """
    Returns (origin, x, y, z) of a frame.

    z is the normalized axis, x the reference vector orthogonalized against z.
    """
    origin = values[0:3]
    z = unit(values[3:6])
    ref = values[6:9]
    x = unit(ref - np.dot(ref, z) * z)
    y = np.cross(z, x)
    return origin, x, y, z


def orthonormal_basis(n: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Two unit vectors spanning the plane perpendicular to unit vector n.

    The helper axis is the coordinate axis least aligned with n (lowest index
    on ties), which keeps the basis deterministic.
    """
    helper = np.zeros(3)
    helper[int(np.argmin(np.abs(n)))] = 1.0
    u = unit(np.cross(n, helper))
    w = np.cross(n, u)
    return u, w


# =============================================================================
# Gauge rows
# =============================================================================

def gauge_count(etype: EntityType) -> int:
    return _LAYOUTS[etype].gauge


def gauge_residual(etype: EntityType, values: np.ndarray, reference: np.ndarray) -> List[float]:
    """
    Linear rows pinning the gauge freedoms of an entity to a reference state.

    The solver moves the reference to every accepted iterate, so the rows
    only constrain each step and never the reachable orientation.

    For a direction d with reference value d0: d . d0/|d0| - |d0|, which fixes
    the stored length without restricting the direction itself. For a frame's
    reference r: r . z0 - r0 . z0 with z0 the reference unit axis, plus the
    length row for the part of r0 perpendicular to z0.
    """
    lay = _LAYOUTS[etype]
    rows = []
    for lo, hi in lay.directions:
        d0 = reference[lo:hi]
        n0 = float(np.linalg.norm(d0))
        rows.append(float(np.dot(values[lo:hi], d0 / n0) - n0))
    if lay.reference is not None:
        lo, hi = lay.reference
        z0 = unit(reference[3:6])
        r0 = reference[lo:hi]
        p0 = r0 - np.dot(r0, z0) * z0
        m0 = float(np.linalg.norm(p0))
        rows.append(float(np.dot(values[lo:hi], z0) - np.dot(r0, z0)))
        rows.append(float(np.dot(values[lo:hi], p0 / m0) - m0))
    return rows


def gauge_jacobian(etype: EntityType, reference: np.ndarray) -> np.ndarray:
    """Constant Jacobian of gauge_residual (rows x entity size)."""
    lay = _LAYOUTS[etype]
    jac = np.zeros((lay.gauge, lay.size))
    row = 0
    for lo, hi in lay.directions:
        d0 = reference[lo:hi]
        jac[row, lo:hi] = d0 / np.linalg.norm(d0)
        row += 1
    if lay.reference is not None:
        lo, hi = lay.reference
        z0 = unit(reference[3:6])
        r0 = reference[lo:hi]
        p0 = r0 - np.dot(r0, z0) * z0
        jac[row, lo:hi] = z0
        jac[row + 1, lo:hi] = p0 / np.linalg.norm(p0)
    return jac
