"""
GeoSolver - Constraint Solver
=============================

Top-level solve pipeline:

1. Snapshot the entity store (the solver borrows it, never holds references).
2. Classify constraints that reference only fixed entities (inert or hard conflict).
3. Decompose the graph into components and ordered clusters.
4. Solve components, in parallel worker threads when there is more than one.
   Inside a component clusters run in topological order; results of a solved
   cluster are inputs of the clusters depending on it.
5. Commit every successful cluster as one atomic batch, unless one of its
   entities was edited in the store after the snapshot was taken.

Failures never raise: each cluster carries its SolveStatus in the SolveReport.

Usage:
    solver = ConstraintSolver()
    report = solver.solve(store, constraints)
    if not report.success:
        for result in report.failed():
            print(result.status, result.implicated_constraints)
"""

from concurrent.futures import ThreadPoolExecutor
import time
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set

import numpy as np
from loguru import logger

from config.feature_flags import is_enabled

from .constraint_diagnostics import DiagnosticsReporter
from .constraints import Constraint, ConstraintSet, EvalContext
from .decomposition import Cluster, ClusterDecomposer, Decomposition
from .dof_analysis import DOFAnalyzer, DOFStatus
from .entity_store import EntityHandle, EntityStore, StaleHandleError, StoreSnapshot
from .geometry import validate_params
from .joints import JOINT_KINDS, JointLimitPolicy, check_measured_limits, resolve_joint_targets
from .solver_interface import CancellationToken, ClusterResult, SolveReport, SolverOptions, SolveStatus
from .solver_lm import CONVERGED, NO_CONVERGENCE, SINGULAR, levenberg_marquardt
from .system import ClusterSystem


def _active(constraints) -> List[Constraint]:
    if isinstance(constraints, ConstraintSet):
        return constraints.active()
    return sorted((c for c in constraints if c.enabled), key=lambda c: c.sequence)


class ConstraintSolver:
    """
    Decomposing Levenberg-Marquardt constraint solver.

    Args:
        options: default SolverOptions, overridable per call
        kernel: optional curve evaluator for ON_CURVE / CURVE_TANGENT
        analyzer: DOFAnalyzer shared by decomposition, solving and diagnostics
    """

    def __init__(self, options: Optional[SolverOptions] = None, kernel=None,
                 analyzer: Optional[DOFAnalyzer] = None):
        self.options = options or SolverOptions()
        self.kernel = kernel
        self.analyzer = analyzer or DOFAnalyzer()

    def solve(self, store: EntityStore, constraints, *, options: Optional[SolverOptions] = None,
              pinned: Optional[Mapping[EntityHandle, Sequence[float]]] = None,
              initial: Optional[Mapping[EntityHandle, Sequence[float]]] = None,
              focus: Optional[Iterable[EntityHandle]] = None, commit: bool = True,
              cancel_token: Optional[CancellationToken] = None, max_iterations: Optional[int] = None,
              diagnose: Optional[bool] = None) -> SolveReport:
        """
        Solves the constraint graph against the store.

        Args:
            store: entity store (read by snapshot, written by per-cluster commits)
            constraints: ConstraintSet or iterable of constraints
            pinned: entities held at the given parameters for this solve only
            initial: starting values for free entities, overriding the store's
            focus: restrict the solve to components touching these entities
            commit: write successful clusters back to the store
            cancel_token: checked between clusters
            max_iterations: iteration cap per cluster (drag frames)
            diagnose: attach relax candidates to failed clusters (default: flag)

        Raises:
            StaleHandleError: a constraint, pinned or initial entry references a removed entity
        """
        start = time.perf_counter()
        options = options or self.options
        if diagnose is None:
            diagnose = is_enabled("solver_auto_diagnostics")
        active = _active(constraints)

        snapshot = store.snapshot()
        for c in active:
            for h in c.entities:
                if h not in snapshot:
                    raise StaleHandleError(f"{c!r} references stale handle {h!r}")
        values = snapshot.values()
        types = snapshot.types()
        pinned = dict(pinned or {})
        for h, params in pinned.items():
            if h not in snapshot:
                raise StaleHandleError(f"Pinned stale handle {h!r}")
            values[h] = validate_params(types[h], params)
        for h, params in (initial or {}).items():
            if h not in snapshot:
                raise StaleHandleError(f"Initial value for stale handle {h!r}")
            values[h] = validate_params(types[h], params)

        decomposer = ClusterDecomposer(self.analyzer, max_seed_size=options.max_seed_size)
        plan = decomposer.decompose(snapshot, active, pinned=pinned, focus=focus)

        report = SolveReport(revision=snapshot.revision)
        known_check = self.analyzer.check_known(plan.fixed_only, values, types, EvalContext(kernel=self.kernel))
        report.inert = known_check.inert
        report.fixed_conflicts = known_check.conflicts
        for cid in known_check.conflicts:
            logger.warning(f"[Solver] Constraint {cid} over fixed entities is violated "
                           f"(residual {known_check.residuals[cid]:.3e})")

        token = cancel_token or CancellationToken()
        jobs = plan.components

        def run(indices: List[int]) -> List[ClusterResult]:
            return self._solve_component(store, snapshot, plan, indices, dict(values), options, commit,
                                         token, max_iterations, diagnose)

        parallel = len(jobs) > 1 and options.max_workers > 1 and is_enabled("solver_parallel_clusters")
        if parallel:
            with ThreadPoolExecutor(max_workers=min(options.max_workers, len(jobs)),
                                    thread_name_prefix="geosolver") as pool:
                per_component = list(pool.map(run, jobs))
        else:
            per_component = [run(indices) for indices in jobs]

        for results in per_component:
            report.clusters.extend(results)
        report.clusters.sort(key=lambda r: r.cluster)
        report.cancelled = any(r.status is SolveStatus.CANCELLED for r in report.clusters)
        report.revision = store.revision
        report.solve_time_ms = (time.perf_counter() - start) * 1000

        log = logger.info if report.success else logger.warning
        log(f"[Solver] {report.summary()}")
        return report

    # -------------------------------------------------------------------------
    # Components
    # -------------------------------------------------------------------------

    def _solve_component(self, store: EntityStore, snapshot: StoreSnapshot, plan: Decomposition,
                         indices: List[int], values: Dict[EntityHandle, np.ndarray], options: SolverOptions,
                         commit: bool, token: CancellationToken, max_iterations: Optional[int],
                         diagnose: bool) -> List[ClusterResult]:
        results = []
        blocked: Set[int] = set()
        for index in indices:
            cluster = plan.clusters[index]
            if token.cancelled:
                results.append(self._empty_result(cluster, SolveStatus.CANCELLED, "solve cancelled"))
                continue
            if index in blocked:
                results.append(self._empty_result(cluster, SolveStatus.SKIPPED, "upstream cluster failed"))
                continue

            result = self._solve_cluster(cluster, plan, snapshot, values, options, max_iterations, diagnose)
            if result.ok:
                values.update(result.params)
                if commit and result.params:
                    if store.commit(result.params, base_revision=snapshot.revision) is None:
                        result.notes.append("entities edited during the solve, result not written")
                    else:
                        result.committed = True
            else:
                blocked |= plan.downstream(index)
            results.append(result)
        return results

    @staticmethod
    def _empty_result(cluster: Cluster, status: SolveStatus, reason: str) -> ClusterResult:
        return ClusterResult(cluster.index, cluster.component, status, cluster.entities,
                             tuple(cluster.constraint_ids), reason=reason)

    # -------------------------------------------------------------------------
    # Cluster
    # -------------------------------------------------------------------------

    def _solve_cluster(self, cluster: Cluster, plan: Decomposition, snapshot: StoreSnapshot,
                       values: Dict[EntityHandle, np.ndarray], options: SolverOptions,
                       max_iterations: Optional[int], diagnose: bool) -> ClusterResult:
        start = time.perf_counter()
        types = snapshot.types()
        known = set(plan.known) | set(cluster.inputs)
        result = ClusterResult(cluster.index, cluster.component, SolveStatus.SOLVED, cluster.entities,
                               tuple(cluster.constraint_ids))

        def finish(status: SolveStatus, **fields) -> ClusterResult:
            result.status = status
            for key, value in fields.items():
                setattr(result, key, value)
            result.solve_time_ms = (time.perf_counter() - start) * 1000
            if diagnose and status in (SolveStatus.OVERCONSTRAINED, SolveStatus.CONFLICTING):
                self._attach_diagnosis(result, cluster, snapshot, values, known, options)
            if not result.ok:
                logger.debug(f"[Solver] Cluster {cluster.index}: {status.value} {result.reason}")
            return result

        policy = options.joint_limit_policy
        overrides, violations = resolve_joint_targets(cluster.constraints, policy)
        if violations:
            if policy is JointLimitPolicy.REJECT:
                return finish(SolveStatus.CONFLICTING,
                              incompatible=tuple(dict.fromkeys(v.constraint_id for v in violations)),
                              reason="; ".join(v.message() for v in violations))
            result.notes.extend(v.message() for v in violations)
        ctx = EvalContext(kernel=self.kernel, overrides=overrides)

        analysis = self.analyzer.analyze(cluster.constraints, cluster.entities, known, types, values, ctx)
        if analysis.status is DOFStatus.OVERCONSTRAINED:
            return finish(SolveStatus.OVERCONSTRAINED, redundant=tuple(analysis.redundant),
                          remaining_dof=analysis.dof,
                          reason=f"redundant constraints: {', '.join(analysis.redundant) or 'count'}")

        under = analysis.status is DOFStatus.UNDERCONSTRAINED
        if not cluster.constraints or (under and not options.solve_underconstrained):
            return finish(SolveStatus.UNDERCONSTRAINED, remaining_dof=analysis.dof,
                          free_entities=tuple(analysis.free_entities or cluster.entities))

        system = ClusterSystem(cluster.constraints, cluster.entities, values, types, ctx, options.fd_step)
        lm = levenberg_marquardt(system, None, options, check_singular=not under, max_iterations=max_iterations)
        result.iterations = lm.iterations
        result.residual_norm = lm.residual_norm

        if lm.status == SINGULAR:
            return finish(SolveStatus.NUMERICAL_FAILURE, reason=f"singular configuration: {lm.message}")
        if lm.status == NO_CONVERGENCE:
            return finish(SolveStatus.NUMERICAL_FAILURE,
                          reason=f"no convergence after {lm.iterations} iterations (|F|={lm.residual_norm:.3e})")
        if lm.status != CONVERGED:
            residuals = system.constraint_residuals(lm.x)
            failing = tuple(cid for cid, r in residuals.items()
                            if r.size and float(np.max(np.abs(r))) >= options.residual_tolerance)
            return finish(SolveStatus.CONFLICTING, incompatible=failing or tuple(cluster.constraint_ids),
                          reason=lm.message or "constraints cannot be satisfied simultaneously")

        solved = system.unpack(lm.x)
        merged = dict(values)
        merged.update(solved)
        limit_checks = []
        for c in cluster.constraints:
            if c.kind in JOINT_KINDS:
                limit_checks.extend(check_measured_limits(c, merged[c.entities[0]], merged[c.entities[1]]))
        if limit_checks:
            if policy is JointLimitPolicy.REJECT:
                return finish(SolveStatus.CONFLICTING,
                              incompatible=tuple(dict.fromkeys(v.constraint_id for v in limit_checks)),
                              reason="; ".join(v.message() for v in limit_checks))
            result.notes.extend(v.message() for v in limit_checks)

        result.params = solved
        if under:
            return finish(SolveStatus.UNDERCONSTRAINED, remaining_dof=analysis.dof,
                          free_entities=tuple(analysis.free_entities))
        return finish(SolveStatus.SOLVED)

    def _attach_diagnosis(self, result: ClusterResult, cluster: Cluster, snapshot: StoreSnapshot,
                          values: Dict[EntityHandle, np.ndarray], known: Set[EntityHandle],
                          options: SolverOptions) -> None:
        reporter = DiagnosticsReporter(self.analyzer)
        names = {h: e.id for h, e in snapshot.entities.items()}
        diagnosis = reporter.explain(cluster, values, snapshot.types(), known, result.status, options,
                                     EvalContext(kernel=self.kernel), names)
        result.diagnosis = diagnosis
        result.relax_candidates = tuple(diagnosis.candidates)
