"""
Curve evaluation oracle.

Higher-order constraints (point on / tangent to a kernel curve) read curve
geometry through a pure evaluation service. The solver treats it as
read-only: it only ever calls ``evaluate`` and never mutates kernel state
mid-solve.
"""

from typing import Any, Protocol, Sequence, Tuple

import numpy as np


class KernelUnavailableError(RuntimeError):
    """A curve constraint was evaluated without a curve evaluator."""


class CurveEvaluator(Protocol):
    """Evaluation service exposed by the geometry kernel."""

    def evaluate(self, curve_id: str, u: float) -> Tuple[Sequence[float], Sequence[float]]:
        """Returns (point, tangent) of the curve at parameter u."""
        ...


def evaluate_curve(kernel: Any, curve_id: str, u: float) -> Tuple[np.ndarray, np.ndarray]:
    if kernel is None:
        raise KernelUnavailableError(f"Curve '{curve_id}' needs a curve evaluator")
    point, tangent = kernel.evaluate(curve_id, float(u))
    return np.asarray(point, dtype=float), np.asarray(tangent, dtype=float)
