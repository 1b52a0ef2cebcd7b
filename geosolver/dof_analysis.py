"""
GeoSolver - DOF Analyzer
========================

Structural degree-of-freedom analysis run before any numerical work.

The count N - M (free geometric parameters minus constraint rows) is
complemented by two structural checks that locate *which* constraints are
redundant:

1. Incremental bipartite matching of constraint rows onto the DOF groups of
   the entities they touch (pos / rot / size / span / value), in constraint
   creation order. A row that finds no free capacity, even after augmenting,
   belongs to a constraint that only restates what earlier constraints
   already determine; the newest constraint is blamed.
2. A union-find over the rotations of 2D lines with a ground node. Relative
   orientation constraints (parallel, perpendicular, angle) and absolute ones
   (horizontal, vertical) that close a cycle are redundant even when capacity
   would still allow them.

Floating clusters (nothing fixed references them) first reserve their rigid
motion, so a free triangle with four distances is reported overconstrained.

This is a necessary but not sufficient filter: a well-determined cluster can
still be inconsistent, which only the numerical solver detects.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import numpy as np
import scipy.linalg
from loguru import logger

from config.tolerances import Tolerances

from .constraints import Constraint, ConstraintSet, EvalContext
from .entity_store import EntityHandle, EntityStore
from .geometry import EntityType, group_capacities, layout
from .system import ClusterSystem

_GROUND = "ground"


class DOFStatus(Enum):
    WELL_CONSTRAINED = "well_constrained"
    UNDERCONSTRAINED = "underconstrained"
    OVERCONSTRAINED = "overconstrained"


@dataclass
class DOFAnalysis:
    """Result of a structural DOF analysis."""
    free_parameters: int
    removed: int
    redundant: List[str] = field(default_factory=list)
    free_entities: List[EntityHandle] = field(default_factory=list)
    reserved: int = 0

    @property
    def dof(self) -> int:
        return self.free_parameters - self.removed

    @property
    def status(self) -> DOFStatus:
        if self.redundant or self.dof < 0:
            return DOFStatus.OVERCONSTRAINED
        if self.dof > 0:
            return DOFStatus.UNDERCONSTRAINED
        return DOFStatus.WELL_CONSTRAINED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "free_parameters": self.free_parameters,
            "removed": self.removed,
            "dof": self.dof,
            "redundant": list(self.redundant),
            "free_entities": [repr(h) for h in self.free_entities],
        }


@dataclass
class KnownCheck:
    """Classification of constraints that reference no free entity."""
    inert: List[str] = field(default_factory=list)
    conflicts: List[str] = field(default_factory=list)
    residuals: Dict[str, float] = field(default_factory=dict)


class _RowMatcher:
    """Capacity-constrained bipartite matching of rows onto (entity, group) slots."""

    def __init__(self, capacity: Dict[Tuple[EntityHandle, str], int]):
        self.capacity = capacity
        self.load: Dict[Tuple[EntityHandle, str], List[int]] = {slot: [] for slot in capacity}
        self.owner: Dict[int, Tuple[EntityHandle, str]] = {}
        self.candidates: Dict[int, List[Tuple[EntityHandle, str]]] = {}

    def add(self, row: int, candidates: List[Tuple[EntityHandle, str]]) -> bool:
        self.candidates[row] = candidates
        return self._augment(row, set())

    def _augment(self, row: int, visited: Set[Tuple[EntityHandle, str]]) -> bool:
        for slot in self.candidates[row]:
            if slot in visited:
                continue
            visited.add(slot)
            if len(self.load[slot]) < self.capacity[slot]:
                self.load[slot].append(row)
                self.owner[row] = slot
                return True
            for other in list(self.load[slot]):
                if self._augment(other, visited):
                    self.load[slot].remove(other)
                    self.load[slot].append(row)
                    self.owner[row] = slot
                    return True
        return False

    def remove(self, row: int) -> None:
        slot = self.owner.pop(row, None)
        if slot is not None:
            self.load[slot].remove(row)
        self.candidates.pop(row, None)

    def slack(self, handle: EntityHandle) -> int:
        return sum(cap - len(self.load[slot]) for slot, cap in self.capacity.items() if slot[0] == handle)


class UnionFind:
    def __init__(self):
        self.parent: Dict[Any, Any] = {}

    def find(self, x):
        self.parent.setdefault(x, x)
        while self.parent[x] != x:
            self.parent[x] = self.parent[self.parent[x]]
            x = self.parent[x]
        return x

    def union(self, a, b) -> bool:
        ra, rb = self.find(a), self.find(b)
        if ra == rb:
            return False
        self.parent[rb] = ra
        return True


class DOFAnalyzer:
    """
    Degree-of-freedom analysis of a cluster.

    Usage:
        analyzer = DOFAnalyzer()
        result = analyzer.analyze(constraints, free, known, types)
        if result.status is DOFStatus.OVERCONSTRAINED:
            print(result.redundant)
    """

    def __init__(self, residual_tolerance: float = Tolerances.EPSILON_RESIDUAL,
                 nullspace_rcond: float = Tolerances.DOF_NULLSPACE_RCOND):
        self.residual_tolerance = residual_tolerance
        self.nullspace_rcond = nullspace_rcond

    def analyze(self, constraints: Sequence[Constraint], free: Sequence[EntityHandle],
                known: Iterable[EntityHandle], types: Mapping[EntityHandle, EntityType],
                values: Optional[Mapping[EntityHandle, np.ndarray]] = None,
                ctx: Optional[EvalContext] = None) -> DOFAnalysis:
        """
        Analyzes one cluster.

        Args:
            constraints: cluster constraints, in creation order
            free: free entities, in creation order
            known: entities read as fixed inputs (fixed, pinned or upstream)
            types: entity types of all referenced entities
            values: current parameters; when given, the free entities of an
                underconstrained cluster are located numerically
        """
        free = list(free)
        free_set = set(free)
        known = set(known)
        constraints = sorted(constraints, key=lambda c: c.sequence)
        active = [c for c in constraints if any(h in free_set for h in c.entities)]

        capacity = {}
        for h in free:
            for group, cap in group_capacities(types[h]).items():
                capacity[(h, group)] = cap
        n_free = sum(layout(types[h]).dof for h in free)

        reserved = self._reserve_gauge(active, free, known, types, capacity)
        matcher = _RowMatcher(capacity)
        rotations = UnionFind()
        for h in known:
            if types.get(h) is EntityType.LINE2D:
                rotations.union(_GROUND, h)

        removed = 0
        redundant: List[str] = []
        row_id = 0
        for c in active:
            ctypes = [types[h] for h in c.entities]
            rows = c.rows(ctypes)
            removed += rows

            link = self._orientation_link(c, ctypes)
            if link is not None and rotations.find(link[0]) == rotations.find(link[1]):
                redundant.append(c.id)
                logger.debug(f"[DOF] {c!r} closes an orientation cycle")
                continue

            allowed = c.dof_groups(ctypes)
            candidates = [
                (h, group) for h in c.entities if h in free_set
                for group in group_capacities(types[h]) if allowed is None or group in allowed
            ]
            placed = []
            ok = True
            for _ in range(rows):
                if matcher.add(row_id, candidates):
                    placed.append(row_id)
                    row_id += 1
                else:
                    matcher.remove(row_id)
                    ok = False
                    break
            if not ok:
                for r in placed:
                    matcher.remove(r)
                redundant.append(c.id)
                logger.debug(f"[DOF] {c!r} finds no free DOF left (redundant)")
                continue
            if link is not None:
                rotations.union(*link)

        result = DOFAnalysis(n_free, removed, redundant, reserved=reserved)
        if result.status is DOFStatus.UNDERCONSTRAINED:
            result.free_entities = self._free_entities(active, free, values, types, ctx, matcher)
        logger.debug(f"[DOF] N={n_free} M={removed} dof={result.dof} status={result.status.value}"
                     f"{f' redundant={redundant}' if redundant else ''}")
        return result

    @staticmethod
    def _orientation_link(c: Constraint, ctypes: List[EntityType]):
        """Union-find edge of a 2D line orientation constraint, or None."""
        mode = c.spec.orientation
        if mode is None or not all(t is EntityType.LINE2D for t in ctypes):
            return None
        if mode == "absolute" and len(c.entities) == 1:
            return (_GROUND, c.entities[0])
        if mode == "relative" and len(c.entities) == 2:
            return (c.entities[0], c.entities[1])
        return None

    @staticmethod
    def _reserve_gauge(constraints: List[Constraint], free: List[EntityHandle], known: Set[EntityHandle],
                       types: Mapping[EntityHandle, EntityType], capacity: Dict[Tuple[EntityHandle, str], int]) -> int:
        """Removes the rigid-motion freedom of a floating cluster from the slot capacities."""
        if not free:
            return 0
        inputs = []
        for c in constraints:
            for h in c.entities:
                if h in known and h not in inputs:
                    inputs.append(h)
        dim = max(layout(types[h]).dim for h in free)
        if dim == 0:
            return 0
        reserved = 0

        def take(group: str, amount: int, minimum: int = 1, order: Sequence[EntityHandle] = free) -> int:
            for h in order:
                slot = (h, group)
                if capacity.get(slot, 0) >= minimum:
                    got = min(amount, capacity[slot])
                    capacity[slot] -= got
                    return got
            return 0

        if inputs:
            # not floating: rigid motion is removed through the inputs
            return 0
        pinned = {c.entities[0] for c in constraints if c.spec.grounds_translation}
        if not pinned:
            reserved += take("pos", dim, minimum=dim)
        rotation_grounded = any(c.spec.grounds_rotation for c in constraints) or len(pinned) >= 2
        # a lone point has no rotation of its own
        extent = (
            sum(1 for h in free if layout(types[h]).anchor is not None) >= 2
            or any("rot" in group_capacities(types[h]) for h in free)
        )
        if not rotation_grounded and extent:
            order = [h for h in free if h not in pinned] + [h for h in free if h in pinned]
            if dim == 2:
                reserved += take("rot", 1, order=order) or take("pos", 1, order=order)
            else:
                reserved += take("rot", 3, minimum=3, order=order)
        return reserved

    def _free_entities(self, constraints, free, values, types, ctx, matcher: _RowMatcher) -> List[EntityHandle]:
        """Entities that keep freedom: numerically via the Jacobian null space, else by leftover capacity."""
        if values is not None:
            try:
                system = ClusterSystem(constraints, free, values, types, ctx)
                J = system.jacobian(system.x0())
            except (ValueError, ArithmeticError) as e:
                logger.debug(f"[DOF] Numeric free-entity analysis unavailable: {e}")
                J = None
            if J is not None and np.all(np.isfinite(J)):
                if J.shape[0] == 0:
                    return list(free)
                basis = scipy.linalg.null_space(J, rcond=self.nullspace_rcond)
                result = []
                for h in free:
                    off = system.offsets[h]
                    size = layout(types[h]).size
                    if basis.size and np.linalg.norm(basis[off:off + size, :]) > Tolerances.DOF_FREE_ENTITY:
                        result.append(h)
                return result
        return [h for h in free if matcher.slack(h) > 0]

    def check_known(self, constraints: Sequence[Constraint], values: Mapping[EntityHandle, np.ndarray],
                    types: Mapping[EntityHandle, EntityType], ctx: Optional[EvalContext] = None) -> KnownCheck:
        """Splits constraints over known entities into inert (satisfied) and hard conflicts."""
        check = KnownCheck()
        for c in sorted(constraints, key=lambda c: c.sequence):
            r = c.residual([values[h] for h in c.entities], [types[h] for h in c.entities], ctx)
            err = float(np.max(np.abs(r))) if r.size else 0.0
            check.residuals[c.id] = err
            if np.isfinite(err) and err <= self.residual_tolerance:
                check.inert.append(c.id)
            else:
                check.conflicts.append(c.id)
                logger.debug(f"[DOF] {c!r} over fixed entities violated (residual {err:.3e})")
        return check

    def analyze_sketch(self, store: EntityStore, constraints: ConstraintSet,
                       ctx: Optional[EvalContext] = None) -> DOFAnalysis:
        """Whole-graph analysis over every non-fixed entity of the store."""
        snapshot = store.snapshot()
        ordered = snapshot.ordered()
        free = [h for h in ordered if not snapshot.is_fixed(h)]
        known = [h for h in ordered if snapshot.is_fixed(h)]
        return self.analyze(constraints.active(), free, known, snapshot.types(), snapshot.values(), ctx)
