"""
Solver options, per-cluster results and the solve report.

Every failure mode of a solve is a ``SolveStatus`` on a ``ClusterResult``;
nothing in the pipeline raises for an unsolvable configuration. The report
carries the implicated constraint and entity ids for UI highlighting.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
import threading
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from config.tolerances import Tolerances

from .entity_store import EntityHandle
from .joints import JointLimitPolicy


class SolveStatus(Enum):
    """Outcome of one cluster."""

    SOLVED = "solved"
    UNDERCONSTRAINED = "underconstrained"
    OVERCONSTRAINED = "overconstrained"
    CONFLICTING = "conflicting"
    NUMERICAL_FAILURE = "numerical_failure"
    SKIPPED = "skipped"          # an upstream cluster failed
    CANCELLED = "cancelled"      # cooperative cancellation between clusters


SUCCESS_STATUSES = frozenset({SolveStatus.SOLVED, SolveStatus.UNDERCONSTRAINED})


@dataclass
class SolverOptions:
    """Configuration of one solve."""

    residual_tolerance: float = Tolerances.SOLVER_RESIDUAL
    step_tolerance: float = Tolerances.SOLVER_STEP
    max_iterations: int = Tolerances.SOLVER_MAX_ITERATIONS
    drag_max_iterations: int = Tolerances.SOLVER_DRAG_MAX_ITERATIONS
    lambda_init: float = Tolerances.SOLVER_LAMBDA_INIT
    lambda_min: float = Tolerances.SOLVER_LAMBDA_MIN
    lambda_max: float = Tolerances.SOLVER_LAMBDA_MAX
    lambda_factor: float = Tolerances.SOLVER_LAMBDA_FACTOR
    gradient_tolerance: float = Tolerances.SOLVER_GRADIENT
    singular_rcond: float = Tolerances.SOLVER_SINGULAR_RCOND
    fd_step: float = Tolerances.SOLVER_FD_STEP
    max_seed_size: int = Tolerances.DOF_MAX_SEED_SIZE
    joint_limit_policy: JointLimitPolicy = JointLimitPolicy.CLAMP
    solve_underconstrained: bool = True
    max_workers: int = 4

    def with_overrides(self, **kwargs) -> "SolverOptions":
        return replace(self, **kwargs)


@dataclass
class ClusterResult:
    """Result of one cluster, including what the UI needs to highlight."""

    cluster: int
    component: int
    status: SolveStatus
    entities: Tuple[EntityHandle, ...] = ()
    constraints: Tuple[str, ...] = ()
    params: Dict[EntityHandle, np.ndarray] = field(default_factory=dict)
    remaining_dof: int = 0
    free_entities: Tuple[EntityHandle, ...] = ()
    redundant: Tuple[str, ...] = ()
    incompatible: Tuple[str, ...] = ()
    reason: str = ""
    relax_candidates: Tuple[str, ...] = ()
    diagnosis: Any = None
    iterations: int = 0
    residual_norm: float = 0.0
    solve_time_ms: float = 0.0
    notes: List[str] = field(default_factory=list)
    committed: bool = False

    @property
    def ok(self) -> bool:
        return self.status in SUCCESS_STATUSES

    @property
    def implicated_constraints(self) -> Tuple[str, ...]:
        return self.redundant or self.incompatible or self.relax_candidates

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster": self.cluster,
            "component": self.component,
            "status": self.status.value,
            "entities": [repr(h) for h in self.entities],
            "constraints": list(self.constraints),
            "remaining_dof": self.remaining_dof,
            "free_entities": [repr(h) for h in self.free_entities],
            "redundant": list(self.redundant),
            "incompatible": list(self.incompatible),
            "relax_candidates": list(self.relax_candidates),
            "reason": self.reason,
            "iterations": self.iterations,
            "residual_norm": self.residual_norm,
            "solve_time_ms": self.solve_time_ms,
            "notes": list(self.notes),
            "committed": self.committed,
        }


@dataclass
class SolveReport:
    """Per-cluster results of one solve call."""

    clusters: List[ClusterResult] = field(default_factory=list)
    inert: List[str] = field(default_factory=list)
    fixed_conflicts: List[str] = field(default_factory=list)
    cancelled: bool = False
    revision: int = 0
    solve_time_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.cancelled and not self.fixed_conflicts and all(r.ok for r in self.clusters)

    def failed(self) -> List[ClusterResult]:
        return [r for r in self.clusters if not r.ok]

    def for_entity(self, handle: EntityHandle) -> Optional[ClusterResult]:
        for r in self.clusters:
            if handle in r.entities:
                return r
        return None

    def for_constraint(self, constraint_id: str) -> Optional[ClusterResult]:
        for r in self.clusters:
            if constraint_id in r.constraints:
                return r
        return None

    def status_counts(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for r in self.clusters:
            counts[r.status.value] = counts.get(r.status.value, 0) + 1
        return counts

    def summary(self) -> str:
        counts = ", ".join(f"{k}={v}" for k, v in sorted(self.status_counts().items()))
        extra = f", {len(self.fixed_conflicts)} fixed conflicts" if self.fixed_conflicts else ""
        state = " (cancelled)" if self.cancelled else ""
        return f"{len(self.clusters)} clusters: {counts or 'none'}{extra} in {self.solve_time_ms:.1f}ms{state}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "clusters": [r.to_dict() for r in self.clusters],
            "inert": list(self.inert),
            "fixed_conflicts": list(self.fixed_conflicts),
            "cancelled": self.cancelled,
            "revision": self.revision,
            "solve_time_ms": self.solve_time_ms,
        }


class CancellationToken:
    """Cooperative cancellation, checked by the solver between clusters."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
