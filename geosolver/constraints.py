"""
GeoSolver - Constraint Registry
===============================

Constraint kinds, the constraint record and the ordered constraint set.

Each ``ConstraintKind`` has exactly one ``KindSpec`` in the registry carrying
its residual, an optional closed-form Jacobian and its structural DOF
footprint. New kinds are added by extending the enum and registering a spec,
never by subclassing ``Constraint``.

Angles are radians internally. The ``make_*`` factories accept an
``AngleUnit`` and convert at this boundary.

Usage:
    constraints = ConstraintSet(store)
    constraints.add(make_distance(p1, p2, 50.0))
    constraints.add(make_angle(l1, l2, 90, unit=AngleUnit.DEGREES))
"""

from dataclasses import dataclass, field
from enum import Enum, auto
import math
import threading
import uuid
from typing import Any, Callable, Dict, FrozenSet, Iterator, List, Optional, Sequence, Tuple, Union

import numpy as np
from loguru import logger

from config.feature_flags import is_enabled

from .entity_store import EntityHandle, EntityStore, StaleHandleError
from .geometry import EntityType, layout


class ConstraintDefinitionError(ValueError):
    """Constraint has the wrong arity, entity types or constants."""


class ConstraintKind(Enum):
    """Available constraint kinds"""
    # Placement
    FIXED = auto()              # Anchor pinned to a position
    COINCIDENT = auto()         # Two anchors at the same place
    DISTANCE = auto()           # Point-point, point-line or point-plane distance
    HORIZONTAL = auto()         # Line horizontal / two points at equal y
    VERTICAL = auto()           # Line vertical / two points at equal x

    # Orientation
    PARALLEL = auto()
    PERPENDICULAR = auto()
    ANGLE = auto()

    # Curves
    TANGENT = auto()
    POINT_ON_LINE = auto()
    POINT_ON_PLANE = auto()
    POINT_ON_CIRCLE = auto()
    RADIUS = auto()
    EQUAL_RADIUS = auto()
    CONCENTRIC = auto()
    ARC_ENDPOINT = auto()
    SYMMETRIC = auto()

    # Kernel curves (evaluated through the curve oracle)
    ON_CURVE = auto()
    CURVE_TANGENT = auto()

    # Assembly joints between two frames
    REVOLUTE = auto()
    PRISMATIC = auto()
    CYLINDRICAL = auto()


class AngleUnit(Enum):
    RADIANS = "rad"
    DEGREES = "deg"


def to_radians(value: float, unit: Union[AngleUnit, str] = AngleUnit.RADIANS) -> float:
    """Converts an angle constant from its declared unit to radians."""
    if isinstance(unit, str):
        key = unit.strip().lower()
        matches = [u for u in AngleUnit if key in (u.value, u.name.lower())]
        if not matches:
            raise ConstraintDefinitionError(f"Unknown angle unit: {unit}")
        unit = matches[0]
    if unit is AngleUnit.DEGREES:
        return math.radians(value)
    return float(value)


@dataclass
class EvalContext:
    """
    Per-solve evaluation context.

    ``overrides`` replaces constraint constants for the duration of one solve
    (clamped joint targets) without touching the caller's constraint.
    """
    kernel: Any = None
    overrides: Dict[str, Dict[str, float]] = field(default_factory=dict)

    def value(self, constraint: "Constraint", key: str, default: Any = None) -> Any:
        override = self.overrides.get(constraint.id)
        if override is not None and key in override:
            return override[key]
        return constraint.params.get(key, default)


TypeSet = FrozenSet[EntityType]
ResidualFn = Callable[["Constraint", List[np.ndarray], List[EntityType], EvalContext], np.ndarray]
JacobianFn = Callable[["Constraint", List[np.ndarray], List[EntityType], EvalContext], Optional[List[np.ndarray]]]


@dataclass(frozen=True)
class KindSpec:
    """Registry entry of one constraint kind."""
    kind: ConstraintKind
    signatures: Tuple[Tuple[TypeSet, ...], ...]
    residual: ResidualFn
    rows: Callable[["Constraint", Sequence[EntityType]], int]
    jacobian: Optional[JacobianFn] = None
    groups: Optional[Callable[["Constraint", Sequence[EntityType]], Optional[FrozenSet[str]]]] = None
    orientation: Optional[str] = None      # "absolute" | "relative" on 2D lines
    grounds_translation: bool = False
    grounds_rotation: bool = False
    required: Tuple[str, ...] = ()
    prepare: Optional[Callable[["Constraint", List[EntityType], List[np.ndarray]], None]] = None


_KIND_SPECS: Dict[ConstraintKind, KindSpec] = {}
_registry_lock = threading.Lock()


def register_kind(spec: KindSpec) -> None:
    _KIND_SPECS[spec.kind] = spec


def _register_builtin_kinds():
    from . import residuals, joints  # noqa: F401  (modules register on import)


def kind_spec(kind: ConstraintKind) -> KindSpec:
    if kind not in _KIND_SPECS:
        with _registry_lock:
            _register_builtin_kinds()
    try:
        return _KIND_SPECS[kind]
    except KeyError:
        raise ConstraintDefinitionError(f"No registered implementation for {kind.name}") from None


@dataclass
class Constraint:
    """A typed relation over an ordered list of entity handles."""
    kind: ConstraintKind
    entities: Tuple[EntityHandle, ...] = ()
    params: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    enabled: bool = True
    sequence: int = -1

    def __post_init__(self):
        self.entities = tuple(self.entities)

    @property
    def spec(self) -> KindSpec:
        return kind_spec(self.kind)

    def rows(self, types: Sequence[EntityType]) -> int:
        return self.spec.rows(self, types)

    def dof_removed(self, types: Sequence[EntityType]) -> int:
        """Nominal DOF reduction, one per residual row."""
        return self.rows(types)

    def dof_groups(self, types: Sequence[EntityType]) -> Optional[FrozenSet[str]]:
        """DOF groups the rows of this constraint can consume, None for all."""
        groups = self.spec.groups
        return groups(self, types) if groups else None

    def residual(self, values: Sequence[np.ndarray], types: Sequence[EntityType],
                 ctx: Optional[EvalContext] = None) -> np.ndarray:
        res = self.spec.residual(self, list(values), list(types), ctx or EvalContext())
        return np.asarray(res, dtype=float).reshape(-1)

    def jacobian(self, values: Sequence[np.ndarray], types: Sequence[EntityType],
                 ctx: Optional[EvalContext] = None) -> Optional[List[np.ndarray]]:
        """
        Closed-form Jacobian blocks, one (rows x entity size) block per entity.

        Returns None when the kind has no closed form; callers fall back to
        finite differences.
        """
        fn = self.spec.jacobian
        if fn is None or not is_enabled("solver_closed_form_jacobians"):
            return None
        return fn(self, list(values), list(types), ctx or EvalContext())

    def __repr__(self) -> str:
        extras = ", ".join(f"{k}={v}" for k, v in self.params.items())
        return f"{self.kind.name}[{self.id}]({extras})"


# =============================================================================
# Constraint set
# =============================================================================

class ConstraintSet:
    """
    Ordered constraint collection bound to an entity store.

    Constraints are validated against the store when added and iterate in
    creation order, which is the order all deterministic tie-breaks use.
    """

    def __init__(self, store: EntityStore):
        self._store = store
        self._constraints: Dict[str, Constraint] = {}
        self._sequence = 0
        self._revision = 0

    @property
    def store(self) -> EntityStore:
        return self._store

    @property
    def revision(self) -> int:
        return self._revision

    def add(self, constraint: Constraint) -> Constraint:
        if constraint.id in self._constraints:
            raise ConstraintDefinitionError(f"Constraint id already in use: {constraint.id}")
        self.validate(constraint)
        constraint.sequence = self._sequence
        self._sequence += 1
        self._constraints[constraint.id] = constraint
        self._revision += 1
        logger.debug(f"[Constraints] Added {constraint!r} on {list(constraint.entities)}")
        return constraint

    def extend(self, constraints) -> List[Constraint]:
        return [self.add(c) for c in constraints]

    def validate(self, constraint: Constraint) -> None:
        """Checks arity, entity types, dimensions and required constants."""
        spec = constraint.spec
        for h in constraint.entities:
            if not self._store.is_valid(h):
                raise StaleHandleError(f"{constraint!r} references stale handle {h!r}")
        types = [self._store.type_of(h) for h in constraint.entities]
        values = [self._store.params(h) for h in constraint.entities]
        if spec.prepare is not None:
            spec.prepare(constraint, types, values)
            types = [self._store.type_of(h) for h in constraint.entities]
        if not any(_matches(sig, types) for sig in spec.signatures):
            raise ConstraintDefinitionError(
                f"{constraint.kind.name} does not accept entities ({', '.join(t.value for t in types)})"
            )
        dims = {layout(t).dim for t in types if layout(t).dim > 0}
        if len(dims) > 1:
            raise ConstraintDefinitionError(f"{constraint.kind.name} mixes 2D and 3D entities")
        if len(set(constraint.entities)) != len(constraint.entities):
            raise ConstraintDefinitionError(f"{constraint.kind.name} references the same entity twice")
        missing = [k for k in spec.required if constraint.params.get(k) is None]
        if missing:
            raise ConstraintDefinitionError(f"{constraint.kind.name} requires {', '.join(missing)}")

    def remove(self, constraint_id: str) -> Constraint:
        try:
            constraint = self._constraints.pop(constraint_id)
        except KeyError:
            raise KeyError(f"Unknown constraint id: {constraint_id}") from None
        self._revision += 1
        return constraint

    def get(self, constraint_id: str) -> Constraint:
        return self._constraints[constraint_id]

    def touching(self, handle: EntityHandle) -> List[Constraint]:
        return [c for c in self if handle in c.entities]

    def purge_entity(self, handle: EntityHandle) -> List[Constraint]:
        """Removes every constraint referencing the entity, e.g. before removing it from the store."""
        removed = self.touching(handle)
        for c in removed:
            self.remove(c.id)
        return removed

    def active(self) -> List[Constraint]:
        return [c for c in self if c.enabled]

    def __iter__(self) -> Iterator[Constraint]:
        return iter(sorted(self._constraints.values(), key=lambda c: c.sequence))

    def __len__(self) -> int:
        return len(self._constraints)

    def __contains__(self, constraint_id: str) -> bool:
        return constraint_id in self._constraints


def _matches(signature: Tuple[TypeSet, ...], types: Sequence[EntityType]) -> bool:
    return len(signature) == len(types) and all(t in allowed for allowed, t in zip(signature, types))


# =============================================================================
# Factories
# =============================================================================

def _check_length(value: float, name: str, allow_zero: bool = True) -> float:
    value = float(value)
    if value < 0 or (value == 0 and not allow_zero) or not math.isfinite(value):
        raise ConstraintDefinitionError(f"{name} must be {'non-negative' if allow_zero else 'positive'}: {value}")
    return value


def make_fixed(entity: EntityHandle, position: Optional[Sequence[float]] = None) -> Constraint:
    """Pins the anchor of an entity. Without a position the current anchor is used."""
    params = {} if position is None else {"position": [float(v) for v in position]}
    return Constraint(ConstraintKind.FIXED, (entity,), params)


def make_coincident(a: EntityHandle, b: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.COINCIDENT, (a, b))


def make_distance(a: EntityHandle, b: EntityHandle, distance: float) -> Constraint:
    """Distance between two anchors, or from a point to a line, axis or plane."""
    return Constraint(ConstraintKind.DISTANCE, (a, b), {"value": _check_length(distance, "distance")})


def make_horizontal(a: EntityHandle, b: Optional[EntityHandle] = None) -> Constraint:
    return Constraint(ConstraintKind.HORIZONTAL, (a,) if b is None else (a, b))


def make_vertical(a: EntityHandle, b: Optional[EntityHandle] = None) -> Constraint:
    return Constraint(ConstraintKind.VERTICAL, (a,) if b is None else (a, b))


def make_parallel(a: EntityHandle, b: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.PARALLEL, (a, b))


def make_perpendicular(a: EntityHandle, b: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.PERPENDICULAR, (a, b))


def make_angle(a: EntityHandle, b: EntityHandle, angle: float,
               unit: Union[AngleUnit, str] = AngleUnit.RADIANS) -> Constraint:
    """Angle from direction a to direction b (signed in 2D)."""
    return Constraint(ConstraintKind.ANGLE, (a, b), {"value": to_radians(angle, unit)})


def make_tangent(a: EntityHandle, b: EntityHandle, internal: bool = False) -> Constraint:
    """Circle/arc tangent to a line, or two circles touching (internally or externally)."""
    return Constraint(ConstraintKind.TANGENT, (a, b), {"internal": bool(internal)})


def make_point_on_line(point: EntityHandle, line: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.POINT_ON_LINE, (point, line))


def make_point_on_plane(point: EntityHandle, plane: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.POINT_ON_PLANE, (point, plane))


def make_point_on_circle(point: EntityHandle, circle: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.POINT_ON_CIRCLE, (point, circle))


def make_radius(circle: EntityHandle, radius: float) -> Constraint:
    return Constraint(ConstraintKind.RADIUS, (circle,), {"value": _check_length(radius, "radius", False)})


def make_equal_radius(a: EntityHandle, b: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.EQUAL_RADIUS, (a, b))


def make_concentric(a: EntityHandle, b: EntityHandle) -> Constraint:
    return Constraint(ConstraintKind.CONCENTRIC, (a, b))


def make_arc_endpoint(point: EntityHandle, arc: EntityHandle, end: str = "start") -> Constraint:
    if end not in ("start", "end"):
        raise ConstraintDefinitionError(f"Arc end must be 'start' or 'end': {end}")
    return Constraint(ConstraintKind.ARC_ENDPOINT, (point, arc), {"end": end})


def make_symmetric(a: EntityHandle, b: EntityHandle, axis: EntityHandle) -> Constraint:
    """a and b mirrored across a 2D line."""
    return Constraint(ConstraintKind.SYMMETRIC, (a, b, axis))


def make_on_curve(point: EntityHandle, parameter: EntityHandle, curve_id: str) -> Constraint:
    """Point lies on a kernel curve at the (free) curve parameter held by a SCALAR entity."""
    return Constraint(ConstraintKind.ON_CURVE, (point, parameter), {"curve_id": curve_id})


def make_curve_tangent(line: EntityHandle, parameter: EntityHandle, curve_id: str) -> Constraint:
    """Line touches a kernel curve at the curve parameter held by a SCALAR entity."""
    return Constraint(ConstraintKind.CURVE_TANGENT, (line, parameter), {"curve_id": curve_id})
