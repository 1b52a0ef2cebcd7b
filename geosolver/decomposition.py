"""
GeoSolver - Cluster Decomposer
==============================

Partitions the constraint graph into clusters that are solved one at a time.

Stage 1: connected components by union-find over shared free entities. Fixed
(and pinned) entities do not connect components; constraints touching no
free entity at all are collected in ``fixed_only``.

Stage 2: rigid-subset extraction inside each component. Seed sets are grown
from the oldest pending entity by adding the oldest neighbour; the first
seed the DOF analyzer reports well-constrained is frozen into its own
cluster and its entities become known inputs for everything after it. The
remainder of the component forms a last cluster.

The result is an explicit, topologically ordered cluster list whose
``depends_on`` edges record which upstream clusters produce each cluster's
inputs. The caller's graph is never modified.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from loguru import logger

from config.feature_flags import is_enabled
from config.tolerances import Tolerances

from .constraints import Constraint
from .dof_analysis import DOFAnalysis, DOFAnalyzer, DOFStatus, UnionFind
from .entity_store import EntityHandle, StoreSnapshot


@dataclass
class Cluster:
    """One nonlinear system: free entities plus the constraints solved with them."""
    index: int
    component: int
    entities: Tuple[EntityHandle, ...]
    constraints: Tuple[Constraint, ...]
    inputs: Tuple[EntityHandle, ...] = ()
    depends_on: Tuple[int, ...] = ()
    rigid: bool = False
    analysis: Optional[DOFAnalysis] = None

    @property
    def constraint_ids(self) -> List[str]:
        return [c.id for c in self.constraints]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "component": self.component,
            "entities": [repr(h) for h in self.entities],
            "constraints": self.constraint_ids,
            "inputs": [repr(h) for h in self.inputs],
            "depends_on": list(self.depends_on),
            "rigid": self.rigid,
        }


@dataclass
class Decomposition:
    """Ordered clusters plus the constraints that reference no free entity."""
    clusters: List[Cluster] = field(default_factory=list)
    fixed_only: List[Constraint] = field(default_factory=list)
    components: List[List[int]] = field(default_factory=list)
    known: Set[EntityHandle] = field(default_factory=set)

    def downstream(self, index: int) -> Set[int]:
        """All clusters that (transitively) consume results of cluster ``index``."""
        result: Set[int] = set()
        frontier = [index]
        while frontier:
            current = frontier.pop()
            for cluster in self.clusters:
                if current in cluster.depends_on and cluster.index not in result:
                    result.add(cluster.index)
                    frontier.append(cluster.index)
        return result

    def cluster_of(self, handle: EntityHandle) -> Optional[Cluster]:
        for cluster in self.clusters:
            if handle in cluster.entities:
                return cluster
        return None

    def __len__(self) -> int:
        return len(self.clusters)


class ClusterDecomposer:
    """
    Deterministic decomposition of a constraint graph.

    Usage:
        decomposer = ClusterDecomposer()
        plan = decomposer.decompose(store.snapshot(), constraints.active())
        for cluster in plan.clusters:
            ...
    """

    def __init__(self, analyzer: Optional[DOFAnalyzer] = None, rigid: Optional[bool] = None,
                 max_seed_size: int = Tolerances.DOF_MAX_SEED_SIZE):
        self.analyzer = analyzer or DOFAnalyzer()
        self._rigid = rigid
        self.max_seed_size = max_seed_size

    @property
    def rigid(self) -> bool:
        if self._rigid is None:
            return is_enabled("solver_rigid_decomposition")
        return self._rigid

    def decompose(self, snapshot: StoreSnapshot, constraints: Iterable[Constraint],
                  pinned: Iterable[EntityHandle] = (), focus: Optional[Iterable[EntityHandle]] = None
                  ) -> Decomposition:
        """
        Args:
            snapshot: store snapshot providing types, fixed flags and creation order
            constraints: active constraints
            pinned: entities treated as fixed for this solve (dragged entity)
            focus: when given, only components adjacent to these entities are returned
        """
        pinned = set(pinned)
        ordered = snapshot.ordered()
        types = snapshot.types()
        known = {h for h in ordered if snapshot.is_fixed(h) or h in pinned}
        free = [h for h in ordered if h not in known]
        constraints = sorted(constraints, key=lambda c: c.sequence)

        uf = UnionFind()
        for h in free:
            uf.find(h)
        fixed_only: List[Constraint] = []
        for c in constraints:
            moving = [h for h in c.entities if h not in known]
            if not moving:
                fixed_only.append(c)
                continue
            for h in moving[1:]:
                uf.union(moving[0], h)

        members: Dict[EntityHandle, List[EntityHandle]] = {}
        for h in free:
            members.setdefault(uf.find(h), []).append(h)
        grouped: Dict[EntityHandle, List[Constraint]] = {root: [] for root in members}
        for c in constraints:
            moving = [h for h in c.entities if h not in known]
            if moving:
                grouped[uf.find(moving[0])].append(c)

        roots = list(members)
        if focus is not None:
            focus = set(focus)
            touched = set()
            for c in constraints:
                if focus.intersection(c.entities):
                    touched.update(uf.find(h) for h in c.entities if h not in known)
            touched.update(uf.find(h) for h in focus if h not in known)
            roots = [r for r in roots if r in touched]
            fixed_only = [c for c in fixed_only if focus.intersection(c.entities)]

        plan = Decomposition(fixed_only=fixed_only, known=known)
        for component, root in enumerate(roots):
            stages = self._split_component(members[root], grouped[root], known, types)
            indices = []
            produced: Dict[EntityHandle, int] = {}
            for entities, cons, rigid, analysis in stages:
                index = len(plan.clusters)
                inputs = []
                for c in cons:
                    for h in c.entities:
                        if h not in entities and h not in inputs:
                            inputs.append(h)
                depends = sorted({produced[h] for h in inputs if h in produced})
                plan.clusters.append(Cluster(index, component, tuple(entities), tuple(cons), tuple(inputs),
                                             tuple(depends), rigid, analysis))
                for h in entities:
                    produced[h] = index
                indices.append(index)
            plan.components.append(indices)

        logger.debug(f"[Decompose] {len(plan.components)} components, {len(plan.clusters)} clusters, "
                     f"{len(plan.fixed_only)} fixed-only constraints")
        return plan

    def _split_component(self, entities: List[EntityHandle], constraints: List[Constraint],
                         known: Set[EntityHandle], types) -> List[Tuple[List[EntityHandle], List[Constraint], bool, Optional[DOFAnalysis]]]:
        if not self.rigid or len(entities) < 2:
            return [(entities, constraints, False, None)]
        whole = self.analyzer.analyze(constraints, entities, known, types)
        if whole.status is DOFStatus.OVERCONSTRAINED:
            return [(entities, constraints, False, whole)]

        touching: Dict[EntityHandle, List[Constraint]] = {h: [] for h in entities}
        for c in constraints:
            for h in c.entities:
                if h in touching:
                    touching[h].append(c)
        rank = {h: i for i, h in enumerate(entities)}

        known = set(known)
        pending = list(entities)
        assigned: Set[str] = set()
        stages = []
        while len(pending) > 1:
            frozen = self._find_rigid_seed(pending, touching, rank, assigned, known, types)
            if frozen is None:
                break
            seed, cons, analysis = frozen
            stages.append((seed, cons, True, analysis))
            known.update(seed)
            assigned.update(c.id for c in cons)
            pending = [h for h in pending if h not in seed]
            logger.debug(f"[Decompose] Froze rigid subset of {len(seed)} entities, {len(cons)} constraints")

        remainder = [c for c in constraints if c.id not in assigned]
        if pending:
            stages.append((pending, remainder, False, None))
        return stages

    def _find_rigid_seed(self, pending, touching, rank, assigned, known, types):
        pending_set = set(pending)
        for start in pending:
            seed = [start]
            while True:
                inside = set(seed) | known
                cons = {}
                for h in seed:
                    for c in touching[h]:
                        if c.id not in assigned and all(e in inside for e in c.entities):
                            cons[c.id] = c
                if cons:
                    ordered = sorted(cons.values(), key=lambda c: c.sequence)
                    analysis = self.analyzer.analyze(ordered, seed, known, types)
                    if analysis.status is DOFStatus.WELL_CONSTRAINED:
                        return seed, ordered, analysis
                if len(seed) >= self.max_seed_size or len(seed) == len(pending):
                    break
                nxt = self._next_neighbour(seed, pending_set, touching, rank, assigned)
                if nxt is None:
                    break
                seed = sorted(seed + [nxt], key=rank.get)
        return None

    @staticmethod
    def _next_neighbour(seed, pending_set, touching, rank, assigned) -> Optional[EntityHandle]:
        """Oldest pending entity sharing an unassigned constraint with the seed."""
        best = None
        for h in seed:
            for c in touching[h]:
                if c.id in assigned:
                    continue
                for e in c.entities:
                    if e in pending_set and e not in seed and (best is None or rank[e] < rank[best]):
                        best = e
        return best
