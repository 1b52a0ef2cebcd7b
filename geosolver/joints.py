"""
GeoSolver - Assembly joints
===========================

Revolute, prismatic and cylindrical joints between two rigid body frames.

The joint axis is the z axis of the first frame (A). The joint angle is the
angle of B's reference x axis measured in A's xy plane; the joint distance is
the offset of B's origin along A's axis.

Row layout (frames A, B):
    REVOLUTE     axes parallel (2), B origin on A axis (2), axial offset (1) [+ angle]
    PRISMATIC    axes parallel (2), B origin on A axis (2), rotation lock (1) [+ distance]
    CYLINDRICAL  axes parallel (2), B origin on A axis (2)                   [+ angle] [+ distance]

Joint limits bound the targets. What happens when a target lies outside its
limits is decided by ``JointLimitPolicy``: CLAMP moves the target onto the
nearest limit (the behavior of the kinematics solver this library serves),
REJECT reports the joint as conflicting.
"""

from dataclasses import dataclass
from enum import Enum
import math
from typing import Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
from loguru import logger

from .constraints import (
    AngleUnit, Constraint, ConstraintDefinitionError, ConstraintKind, EvalContext, KindSpec,
    register_kind, to_radians,
)
from .entity_store import EntityHandle
from .geometry import EntityType, frame_axes, wrap_angle


class JointLimitPolicy(Enum):
    CLAMP = "clamp"
    REJECT = "reject"


JOINT_KINDS = frozenset({ConstraintKind.REVOLUTE, ConstraintKind.PRISMATIC, ConstraintKind.CYLINDRICAL})

# (target key, lower limit key, upper limit key) per joint kind
_LIMIT_KEYS = {
    ConstraintKind.REVOLUTE: (("angle", "min_angle", "max_angle"),),
    ConstraintKind.PRISMATIC: (("distance", "min_distance", "max_distance"),),
    ConstraintKind.CYLINDRICAL: (("angle", "min_angle", "max_angle"), ("distance", "min_distance", "max_distance")),
}

FRAME = frozenset({EntityType.FRAME3D})


def joint_angle(a_values: np.ndarray, b_values: np.ndarray) -> float:
    """Angle of B's x axis in A's xy plane, in [-pi, pi)."""
    _, xa, ya, _ = frame_axes(a_values)
    _, xb, _, _ = frame_axes(b_values)
    return wrap_angle(math.atan2(float(np.dot(xb, ya)), float(np.dot(xb, xa))))


def joint_distance(a_values: np.ndarray, b_values: np.ndarray) -> float:
    """Offset of B's origin along A's axis."""
    origin, _, _, z = frame_axes(a_values)
    return float(np.dot(b_values[0:3] - origin, z))


def _joint_rows(c: Constraint, types) -> int:
    rows = 4 if c.kind is ConstraintKind.CYLINDRICAL else 5
    if c.kind is not ConstraintKind.PRISMATIC and c.params.get("angle") is not None:
        rows += 1
    if c.kind is not ConstraintKind.REVOLUTE and c.params.get("distance") is not None:
        rows += 1
    return rows


def _joint_residual(c: Constraint, values, types, ctx: EvalContext):
    oa, xa, ya, za = frame_axes(values[0])
    ob, xb, _, zb = frame_axes(values[1])
    w = ob - oa
    rows = [np.dot(zb, xa), np.dot(zb, ya), np.dot(w, xa), np.dot(w, ya)]
    theta = math.atan2(float(np.dot(xb, ya)), float(np.dot(xb, xa)))

    if c.kind is ConstraintKind.REVOLUTE:
        rows.append(np.dot(w, za) - ctx.value(c, "offset", 0.0))
    elif c.kind is ConstraintKind.PRISMATIC:
        rows.append(wrap_angle(theta - ctx.value(c, "lock_angle", 0.0)))

    angle = ctx.value(c, "angle")
    if angle is not None and c.kind is not ConstraintKind.PRISMATIC:
        rows.append(wrap_angle(theta - angle))
    distance = ctx.value(c, "distance")
    if distance is not None and c.kind is not ConstraintKind.REVOLUTE:
        rows.append(np.dot(w, za) - distance)
    return rows


for _kind in JOINT_KINDS:
    register_kind(KindSpec(_kind, ((FRAME, FRAME),), _joint_residual, _joint_rows))


# =============================================================================
# Factories
# =============================================================================

def _limits(lower: Optional[float], upper: Optional[float], name: str) -> Tuple[Optional[float], Optional[float]]:
    if lower is not None and upper is not None and lower > upper:
        raise ConstraintDefinitionError(f"{name} limits inverted: {lower} > {upper}")
    return lower, upper


def _angle_or_none(value, unit):
    return None if value is None else to_radians(value, unit)


def make_revolute(a: EntityHandle, b: EntityHandle, angle: Optional[float] = None,
                  min_angle: Optional[float] = None, max_angle: Optional[float] = None,
                  offset: float = 0.0, unit: Union[AngleUnit, str] = AngleUnit.RADIANS) -> Constraint:
    """Hinge about A's z axis; B may only rotate about it."""
    lo, hi = _limits(_angle_or_none(min_angle, unit), _angle_or_none(max_angle, unit), "angle")
    return Constraint(ConstraintKind.REVOLUTE, (a, b), {
        "angle": _angle_or_none(angle, unit), "min_angle": lo, "max_angle": hi, "offset": float(offset),
    })


def make_prismatic(a: EntityHandle, b: EntityHandle, distance: Optional[float] = None,
                   min_distance: Optional[float] = None, max_distance: Optional[float] = None,
                   lock_angle: float = 0.0, unit: Union[AngleUnit, str] = AngleUnit.RADIANS) -> Constraint:
    """Slider along A's z axis; B keeps the relative rotation ``lock_angle``."""
    lo, hi = _limits(min_distance, max_distance, "distance")
    return Constraint(ConstraintKind.PRISMATIC, (a, b), {
        "distance": None if distance is None else float(distance),
        "min_distance": lo, "max_distance": hi, "lock_angle": to_radians(lock_angle, unit),
    })


def make_cylindrical(a: EntityHandle, b: EntityHandle, angle: Optional[float] = None,
                     distance: Optional[float] = None,
                     min_angle: Optional[float] = None, max_angle: Optional[float] = None,
                     min_distance: Optional[float] = None, max_distance: Optional[float] = None,
                     unit: Union[AngleUnit, str] = AngleUnit.RADIANS) -> Constraint:
    """Rotation about and translation along A's z axis."""
    alo, ahi = _limits(_angle_or_none(min_angle, unit), _angle_or_none(max_angle, unit), "angle")
    dlo, dhi = _limits(min_distance, max_distance, "distance")
    return Constraint(ConstraintKind.CYLINDRICAL, (a, b), {
        "angle": _angle_or_none(angle, unit), "distance": None if distance is None else float(distance),
        "min_angle": alo, "max_angle": ahi, "min_distance": dlo, "max_distance": dhi,
    })


# =============================================================================
# Limits
# =============================================================================

@dataclass
class LimitCheck:
    """A joint value (target or measured) checked against the joint's limits."""
    constraint_id: str
    key: str
    value: float
    effective: float
    lower: Optional[float]
    upper: Optional[float]
    measured: bool = False

    @property
    def violated(self) -> bool:
        return self.value != self.effective

    def message(self) -> str:
        what = "measured" if self.measured else "target"
        lo = "-inf" if self.lower is None else f"{self.lower:.6g}"
        hi = "inf" if self.upper is None else f"{self.upper:.6g}"
        return (f"Joint {self.constraint_id}: {what} {self.key} {self.value:.6g} outside "
                f"[{lo}, {hi}], limited to {self.effective:.6g}")


def _clamp(value: float, lower: Optional[float], upper: Optional[float]) -> float:
    if lower is not None and value < lower:
        return lower
    if upper is not None and value > upper:
        return upper
    return value


def resolve_joint_targets(constraints: Iterable[Constraint], policy: JointLimitPolicy
                          ) -> Tuple[Dict[str, Dict[str, float]], List[LimitCheck]]:
    """
    Checks joint targets against their limits.

    Returns:
        (overrides, violations): clamped targets keyed by constraint id (only
        under CLAMP) and every target found outside its limits.
    """
    overrides: Dict[str, Dict[str, float]] = {}
    violations: List[LimitCheck] = []
    for c in constraints:
        for key, lo_key, hi_key in _LIMIT_KEYS.get(c.kind, ()):
            target = c.params.get(key)
            if target is None:
                continue
            lower, upper = c.params.get(lo_key), c.params.get(hi_key)
            check = LimitCheck(c.id, key, target, _clamp(target, lower, upper), lower, upper)
            if not check.violated:
                continue
            violations.append(check)
            if policy is JointLimitPolicy.CLAMP:
                overrides.setdefault(c.id, {})[key] = check.effective
                logger.warning(f"[Joint] {check.message()}")
    return overrides, violations


def measure_joint(c: Constraint, a_values: np.ndarray, b_values: np.ndarray) -> Dict[str, float]:
    return {"angle": joint_angle(a_values, b_values), "distance": joint_distance(a_values, b_values)}


def check_measured_limits(c: Constraint, a_values: np.ndarray, b_values: np.ndarray) -> List[LimitCheck]:
    """Limit checks for the joint values that have no target and were left free by the solve."""
    measured = measure_joint(c, a_values, b_values)
    checks = []
    for key, lo_key, hi_key in _LIMIT_KEYS.get(c.kind, ()):
        if c.params.get(key) is not None:
            continue
        if c.kind is ConstraintKind.PRISMATIC and key == "angle":
            continue
        lower, upper = c.params.get(lo_key), c.params.get(hi_key)
        value = measured[key]
        check = LimitCheck(c.id, key, value, _clamp(value, lower, upper), lower, upper, measured=True)
        if check.violated:
            checks.append(check)
    return checks
