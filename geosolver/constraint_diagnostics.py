"""
GeoSolver - Constraint Diagnostics
==================================

Turns an Overconstrained or Conflicting cluster into the constraints a user
should relax.

Search:
1. Removal: drop the most recently added constraint of the cluster, re-run
   the DOF analysis (and, for conflicts, a scratch solve that is never
   committed) and repeat until the cluster is solvable.
2. Deletion filter: put every removed constraint back, oldest first, if the
   cluster stays solvable with it.

Not a guaranteed minimum hitting set, but bounded (one pass each way) and
deterministic. Candidates are reported most-recently-added first.

Usage:
    from geosolver.constraint_diagnostics import diagnose

    for diagnosis in diagnose(store, constraints):
        print(diagnosis.to_user_report())
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import numpy as np
from loguru import logger

from .constraints import Constraint, EvalContext
from .dof_analysis import DOFAnalyzer, DOFStatus
from .entity_store import EntityHandle
from .geometry import EntityType
from .joints import JOINT_KINDS, JointLimitPolicy, check_measured_limits, resolve_joint_targets
from .solver_interface import SolveStatus
from .solver_lm import levenberg_marquardt
from .system import ClusterSystem


class DiagnosisType(Enum):
    REDUNDANT = "redundant"
    CONFLICTING = "conflicting"


@dataclass
class Diagnosis:
    """
    Explanation of one failed cluster.

    Attributes:
        cluster: cluster index in the solve report
        diagnosis_type: redundant (overconstrained) or conflicting
        candidates: constraint ids to relax, most recently added first
        entities: ids of the entities those constraints touch
        solvable: whether removing the candidates makes the cluster solvable
    """
    cluster: int
    diagnosis_type: DiagnosisType
    candidates: List[str] = field(default_factory=list)
    kinds: List[str] = field(default_factory=list)
    entities: List[str] = field(default_factory=list)
    solvable: bool = True
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster,
            "diagnosis_type": self.diagnosis_type.value,
            "candidates": list(self.candidates),
            "kinds": list(self.kinds),
            "entities": list(self.entities),
            "solvable": self.solvable,
            "message": self.message,
        }

    def to_user_report(self) -> str:
        """Human readable report."""
        title = {
            DiagnosisType.REDUNDANT: "Overconstrained (redundant constraints)",
            DiagnosisType.CONFLICTING: "Conflicting constraints",
        }[self.diagnosis_type]
        lines = ["Constraint diagnosis", "=" * 40, "", f"Cluster {self.cluster}: {title}", ""]
        if self.candidates:
            lines.append("Relax one of (most recent first):")
            for i, (cid, kind) in enumerate(zip(self.candidates, self.kinds), 1):
                lines.append(f"  {i}. {kind} [{cid}]")
        if self.entities:
            lines.append(f"Affected entities: {', '.join(self.entities)}")
        if not self.solvable:
            lines.append("Removing these constraints does not make the cluster solvable.")
        return "\n".join(lines)


class DiagnosticsReporter:
    """Finds a small, deterministic set of constraints to relax for a failed cluster."""

    def __init__(self, analyzer: Optional[DOFAnalyzer] = None, max_removals: Optional[int] = None):
        self.analyzer = analyzer or DOFAnalyzer()
        self.max_removals = max_removals

    def explain(self, cluster, values: Mapping[EntityHandle, np.ndarray], types: Mapping[EntityHandle, EntityType],
                known: Iterable[EntityHandle], status: SolveStatus, options,
                ctx: Optional[EvalContext] = None, entity_ids: Optional[Mapping[EntityHandle, str]] = None
                ) -> Diagnosis:
        """
        Args:
            cluster: the failed Cluster
            values: parameters at the start of the cluster solve
            known: entities treated as fixed inputs
            status: OVERCONSTRAINED or CONFLICTING
            options: SolverOptions used for scratch solves
        """
        known = set(known) | set(cluster.inputs)
        overconstrained = status is SolveStatus.OVERCONSTRAINED
        kernel = ctx.kernel if ctx is not None else None
        remaining = sorted(cluster.constraints, key=lambda c: c.sequence)
        limit = self.max_removals or len(remaining)

        def solvable(subset: List[Constraint]) -> bool:
            return self._solvable(subset, cluster.entities, values, types, known, overconstrained, options, kernel)

        removed: List[Constraint] = []
        ok = False
        while remaining and len(removed) < limit:
            removed.append(remaining.pop())
            if solvable(remaining):
                ok = True
                break

        if ok:
            for c in sorted(removed, key=lambda c: c.sequence):
                trial = sorted(remaining + [c], key=lambda c: c.sequence)
                if solvable(trial):
                    remaining = trial
                    removed.remove(c)

        removed.sort(key=lambda c: c.sequence, reverse=True)
        touched: List[EntityHandle] = []
        for c in removed:
            for h in c.entities:
                if h not in touched:
                    touched.append(h)
        names = entity_ids or {}
        diagnosis = Diagnosis(
            cluster=cluster.index,
            diagnosis_type=DiagnosisType.REDUNDANT if overconstrained else DiagnosisType.CONFLICTING,
            candidates=[c.id for c in removed],
            kinds=[c.kind.name for c in removed],
            entities=[names.get(h, repr(h)) for h in touched],
            solvable=ok,
        )
        diagnosis.message = (
            f"Cluster {cluster.index}: relax {', '.join(diagnosis.candidates)}" if ok
            else f"Cluster {cluster.index}: no solvable subset within {limit} removals"
        )
        logger.debug(f"[Diagnostics] {diagnosis.message}")
        return diagnosis

    def _solvable(self, subset: List[Constraint], free: Sequence[EntityHandle], values, types, known,
                  overconstrained: bool, options, kernel) -> bool:
        if not subset:
            return True
        analysis = self.analyzer.analyze(subset, free, known, types)
        if analysis.status is DOFStatus.OVERCONSTRAINED:
            return False
        if overconstrained:
            return True

        policy = options.joint_limit_policy
        overrides, violations = resolve_joint_targets(subset, policy)
        if violations and policy is JointLimitPolicy.REJECT:
            return False
        ctx = EvalContext(kernel=kernel, overrides=overrides)
        system = ClusterSystem(subset, free, values, types, ctx, options.fd_step)
        lm = levenberg_marquardt(system, None, options, check_singular=False)
        if not lm.converged:
            return False
        if policy is JointLimitPolicy.REJECT:
            solved = dict(values)
            solved.update(system.unpack(lm.x))
            for c in subset:
                if c.kind in JOINT_KINDS and check_measured_limits(c, solved[c.entities[0]], solved[c.entities[1]]):
                    return False
        return True


def diagnose(store, constraints, solver=None) -> List[Diagnosis]:
    """Dry-run solve (nothing is committed) returning the diagnosis of every failed cluster."""
    from .solver import ConstraintSolver

    solver = solver or ConstraintSolver()
    report = solver.solve(store, constraints, commit=False, diagnose=True)
    return [r.diagnosis for r in report.failed() if r.diagnosis is not None]
