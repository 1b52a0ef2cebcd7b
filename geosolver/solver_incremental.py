"""
GeoSolver - Incremental Solve Controller
========================================

Re-solves only the clusters touched by an interactive drag.

Drag strategy:
1. Move the dragged entity's anchor. A point or scalar is pinned at the
   perturbed value; any other entity gets a temporary FIXED on its anchor only, so
   its direction, radius or span stays free for the other constraints.
2. Decompose only the components adjacent to it and solve them with the
   current store values as the initial guess and a bounded iteration cap.
3. Commit the dragged entity plus all solved clusters as one batch, and only
   if every affected cluster succeeded and none of their entities was edited
   meanwhile. A failed frame writes nothing, so the store keeps the last good
   configuration.

A pending background full solve is cancelled (cooperatively, between
clusters) and joined before a drag frame runs.

Usage:
    controller = IncrementalSolveController(store, constraints)
    result = controller.drag(p2, (1.0, 0.0))
    if not result.success:
        print(f"drag attempt {result.attempt} failed")
"""

from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
import threading
from typing import Optional, Sequence

import numpy as np
from loguru import logger

from config.tolerances import drag_max_iterations

from .constraints import ConstraintSet, make_fixed
from .entity_store import Entity, EntityFixedError, EntityHandle, EntityStore
from .geometry import layout
from .solver import ConstraintSolver
from .solver_interface import CancellationToken, SolveReport


@dataclass
class DragResult:
    """Outcome of one drag frame."""
    attempt: int
    success: bool
    report: SolveReport
    committed: bool = False

    @property
    def failed_clusters(self):
        return self.report.failed()


@dataclass
class BackgroundSolve:
    """Full solve running on the controller's worker thread."""
    future: Future
    token: CancellationToken

    def cancel(self) -> None:
        self.token.cancel()

    def done(self) -> bool:
        return self.future.done()

    def result(self, timeout: Optional[float] = None) -> SolveReport:
        return self.future.result(timeout)


class IncrementalSolveController:
    """Drag-time solving on top of a ConstraintSolver."""

    def __init__(self, store: EntityStore, constraints: ConstraintSet, solver: Optional[ConstraintSolver] = None):
        self.store = store
        self.constraints = constraints
        self.solver = solver or ConstraintSolver()
        self._attempt = 0
        self._lock = threading.Lock()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._pending: Optional[BackgroundSolve] = None

    @property
    def attempts(self) -> int:
        return self._attempt

    def drag(self, handle: EntityHandle, delta: Sequence[float]) -> DragResult:
        """Moves the entity's anchor by ``delta`` and re-solves the affected clusters."""
        entity = self.store.entity(handle)
        if entity.fixed:
            raise EntityFixedError(f"Cannot drag fixed entity {entity.id}")
        params = entity.params.copy()
        delta = np.asarray(delta, dtype=float).reshape(-1)
        span = layout(entity.type).anchor or (0, len(params))
        lo, hi = span
        if delta.shape[0] != hi - lo:
            raise ValueError(f"Drag delta for {entity.type.value} needs {hi - lo} components, got {delta.shape[0]}")
        params[lo:hi] += delta
        return self._drag_frame(entity, params)

    def drag_to(self, handle: EntityHandle, position: Sequence[float]) -> DragResult:
        """Moves the entity's anchor to ``position`` and re-solves the affected clusters."""
        entity = self.store.entity(handle)
        lo, hi = layout(entity.type).anchor or (0, len(entity.params))
        return self.drag(handle, np.asarray(position, dtype=float) - entity.params[lo:hi])

    def _drag_frame(self, entity: Entity, params: np.ndarray) -> DragResult:
        with self._lock:
            self._attempt += 1
            attempt = self._attempt
        self._cancel_pending()

        handle = entity.handle
        options = self.solver.options
        cap = min(options.drag_max_iterations, drag_max_iterations())
        base_revision = self.store.revision
        lay = layout(entity.type)
        if lay.anchor is None or lay.anchor == (0, lay.size):
            # the anchor is the whole entity
            report = self.solver.solve(self.store, self.constraints, pinned={handle: params}, focus={handle},
                                       commit=False, max_iterations=cap)
            batch = {handle: params}
        else:
            lo, hi = lay.anchor
            hold = make_fixed(handle, params[lo:hi])
            hold.id = f"drag:{entity.id}"
            report = self.solver.solve(self.store, [hold, *self.constraints.active()], initial={handle: params},
                                       focus={handle}, commit=False, max_iterations=cap)
            batch = {}

        committed = False
        if report.success:
            for result in report.clusters:
                batch.update(result.params)
            committed = self.store.commit(batch, base_revision=base_revision) is not None
        if committed:
            for result in report.clusters:
                result.committed = bool(result.params)
            report.revision = self.store.revision
            logger.debug(f"[Drag] Attempt {attempt} on {entity.id}: {len(report.clusters)} clusters committed")
        elif report.success:
            logger.warning(f"[Drag] Attempt {attempt} on {entity.id} discarded, store edited during the frame")
        else:
            logger.warning(f"[Drag] Attempt {attempt} on {entity.id} failed, store unchanged: {report.summary()}")
        return DragResult(attempt, committed, report, committed)

    # -------------------------------------------------------------------------
    # Full solves
    # -------------------------------------------------------------------------

    def solve_all(self, background: bool = False):
        """
        Full-graph solve.

        Returns:
            SolveReport, or a BackgroundSolve when ``background`` is True
        """
        if not background:
            self._cancel_pending()
            return self.solver.solve(self.store, self.constraints)
        self._cancel_pending()
        token = CancellationToken()
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="geosolver-bg")
        future = self._executor.submit(self.solver.solve, self.store, self.constraints, cancel_token=token)
        self._pending = BackgroundSolve(future, token)
        logger.debug("[Drag] Background solve scheduled")
        return self._pending

    def _cancel_pending(self) -> None:
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()
            wait([pending.future])
            logger.debug("[Drag] Background solve cancelled")

    def close(self) -> None:
        self._cancel_pending()
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
