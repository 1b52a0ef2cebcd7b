"""
Stacked nonlinear system of one cluster.

Maps the free entities of a cluster onto one parameter vector x and stacks
the residual rows of its constraints (in creation order) followed by the
gauge rows of its free entities. Gauge rows are linear around a reference
state that the solver moves to every accepted iterate. Entities that are referenced but not free
(fixed, pinned or solved by an upstream cluster) are read-only inputs.
"""

from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from config.tolerances import Tolerances

from .constraints import Constraint, EvalContext
from .entity_store import EntityHandle
from .geometry import EntityType, gauge_count, gauge_jacobian, gauge_residual, layout

# second difference above this is a wrapped-angle discontinuity, not curvature
_BRANCH_JUMP = 1.0


class ClusterSystem:
    """Residual vector F(x) and Jacobian J(x) over a cluster's free parameters."""

    def __init__(self, constraints: Sequence[Constraint], free: Sequence[EntityHandle],
                 values: Mapping[EntityHandle, np.ndarray], types: Mapping[EntityHandle, EntityType],
                 ctx: Optional[EvalContext] = None, fd_step: float = Tolerances.SOLVER_FD_STEP):
        self.constraints = list(constraints)
        self.free = list(free)
        self.types = dict(types)
        self.ctx = ctx or EvalContext()
        self.fd_step = fd_step

        referenced = {h for c in self.constraints for h in c.entities} | set(self.free)
        self._base: Dict[EntityHandle, np.ndarray] = {h: np.array(values[h], dtype=float) for h in referenced}

        self.offsets: Dict[EntityHandle, int] = {}
        n = 0
        for h in self.free:
            self.offsets[h] = n
            n += layout(self.types[h]).size
        self.n = n

        self._rows: List[Tuple[Constraint, slice]] = []
        self.row_labels: List[str] = []
        m = 0
        for c in self.constraints:
            k = c.rows([self.types[h] for h in c.entities])
            self._rows.append((c, slice(m, m + k)))
            self.row_labels.extend([c.id] * k)
            m += k
        self.constraint_rows = m

        self._gauges: List[Tuple[EntityHandle, slice, np.ndarray]] = []
        for h in self.free:
            g = gauge_count(self.types[h])
            if g:
                self._gauges.append((h, slice(m, m + g), self._base[h].copy()))
                self.row_labels.extend([f"gauge:{h.index}"] * g)
                m += g
        self.m = m

    # -------------------------------------------------------------------------
    # Packing
    # -------------------------------------------------------------------------

    def x0(self) -> np.ndarray:
        return self.pack(self._base)

    def pack(self, values: Mapping[EntityHandle, np.ndarray]) -> np.ndarray:
        x = np.zeros(self.n)
        for h, off in self.offsets.items():
            v = values[h]
            x[off:off + len(v)] = v
        return x

    def unpack(self, x: np.ndarray) -> Dict[EntityHandle, np.ndarray]:
        """Free entity parameters contained in x."""
        out = {}
        for h, off in self.offsets.items():
            size = layout(self.types[h]).size
            out[h] = np.array(x[off:off + size])
        return out

    def rebase_gauges(self, x: np.ndarray) -> None:
        """Moves the gauge references to the free entities' values in x."""
        current = self._current(x)
        self._gauges = [(h, rows, np.array(current[h], dtype=float)) for h, rows, _ in self._gauges]

    def _current(self, x: np.ndarray) -> Dict[EntityHandle, np.ndarray]:
        current = dict(self._base)
        current.update(self.unpack(x))
        return current

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def residual(self, x: np.ndarray) -> np.ndarray:
        current = self._current(x)
        F = np.zeros(self.m)
        for c, rows in self._rows:
            F[rows] = c.residual([current[h] for h in c.entities], [self.types[h] for h in c.entities], self.ctx)
        for h, rows, reference in self._gauges:
            F[rows] = gauge_residual(self.types[h], current[h], reference)
        return F

    def constraint_residuals(self, x: np.ndarray) -> Dict[str, np.ndarray]:
        """Residual rows per constraint id (gauge rows excluded)."""
        F = self.residual(x)
        return {c.id: F[rows] for c, rows in self._rows}

    def jacobian(self, x: np.ndarray) -> np.ndarray:
        current = self._current(x)
        J = np.zeros((self.m, self.n))
        for c, rows in self._rows:
            vals = [current[h] for h in c.entities]
            tps = [self.types[h] for h in c.entities]
            blocks = c.jacobian(vals, tps, self.ctx)
            for i, h in enumerate(c.entities):
                off = self.offsets.get(h)
                if off is None:
                    continue
                size = len(vals[i])
                if blocks is not None:
                    J[rows, off:off + size] = blocks[i]
                else:
                    J[rows, off:off + size] = self._finite_difference(c, vals, tps, i)
        for h, rows, reference in self._gauges:
            off = self.offsets[h]
            J[rows, off:off + len(reference)] = gauge_jacobian(self.types[h], reference)
        return J

    def _finite_difference(self, c: Constraint, vals: List[np.ndarray], tps: List[EntityType],
                           index: int) -> np.ndarray:
        """
        Central differences of one constraint w.r.t. one entity's parameters.

        Rows that jump across a branch cut between the two samples (wrapped
        angles) fall back to the one-sided difference that stays on the
        current branch.
        """
        base = vals[index]
        r0 = c.residual(vals, tps, self.ctx)
        columns = []
        for k in range(len(base)):
            step = self.fd_step * max(1.0, abs(base[k]))
            plus = list(vals)
            minus = list(vals)
            plus[index] = base.copy()
            minus[index] = base.copy()
            plus[index][k] += step
            minus[index][k] -= step
            rp = c.residual(plus, tps, self.ctx)
            rm = c.residual(minus, tps, self.ctx)
            column = (rp - rm) / (2.0 * step)
            jump = np.abs(rp - 2.0 * r0 + rm) > _BRANCH_JUMP
            if np.any(jump):
                forward = (rp - r0) / step
                backward = (r0 - rm) / step
                column = np.where(jump, np.where(np.abs(forward) <= np.abs(backward), forward, backward), column)
            columns.append(column)
        return np.column_stack(columns)
