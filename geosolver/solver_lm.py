"""
GeoSolver - Levenberg-Marquardt
===============================

Damped Gauss-Newton iteration on one cluster system.

Step:        (J^T J + lambda I) dx = -J^T F(x)
Damping:     lambda / factor after an improving step, lambda * factor after a
             rejected one, clamped to [lambda_min, lambda_max]
Convergence: ||F||_inf < residual_tolerance AND ||dx||_inf < step_tolerance

Outcomes (``LMResult.status``):
    converged       both tolerances met
    no_convergence  iteration cap reached
    singular        non-finite values, or (well-determined clusters only)
                    a rank-deficient Jacobian at the initial guess
    stalled         stationary point with a non-zero residual, i.e. the
                    constraints cannot all hold at once. For a square system
                    this is where J loses rank, which is why the rank check
                    only looks at the starting geometry.
"""

from dataclasses import dataclass
import time
from typing import Optional

import numpy as np
import scipy.linalg
from loguru import logger

from config.feature_flags import is_enabled

from .system import ClusterSystem

CONVERGED = "converged"
NO_CONVERGENCE = "no_convergence"
SINGULAR = "singular"
STALLED = "stalled"


@dataclass
class LMResult:
    x: np.ndarray
    status: str
    iterations: int = 0
    residual_norm: float = float("inf")
    step_norm: float = 0.0
    damping: float = 0.0
    solve_time_ms: float = 0.0
    message: str = ""

    @property
    def converged(self) -> bool:
        return self.status == CONVERGED


def _inf_norm(v: np.ndarray) -> float:
    return float(np.max(np.abs(v))) if v.size else 0.0


def levenberg_marquardt(system: ClusterSystem, x0: Optional[np.ndarray], options,
                        check_singular: bool = True, max_iterations: Optional[int] = None) -> LMResult:
    """
    Drives the system's residual to zero starting from x0.

    Args:
        system: cluster system (residual and Jacobian)
        x0: initial guess, defaults to the system's current values
        options: SolverOptions (tolerances and damping schedule)
        check_singular: run the rank check on J (well-determined clusters)
        max_iterations: overrides options.max_iterations (drag frames)
    """
    start = time.perf_counter()
    trace = is_enabled("solver_debug_logging")
    cap = options.max_iterations if max_iterations is None else max_iterations
    x = (system.x0() if x0 is None else np.array(x0, dtype=float))

    def finish(status: str, iterations: int, F: np.ndarray, dx_norm: float, lam: float, message: str = ""):
        return LMResult(x, status, iterations, _inf_norm(F) if F is not None else float("inf"), dx_norm, lam,
                        (time.perf_counter() - start) * 1000, message)

    F = system.residual(x)
    if not np.all(np.isfinite(F)):
        return finish(SINGULAR, 0, None, 0.0, 0.0, "non-finite residual at initial guess")
    if system.n == 0:
        status = CONVERGED if _inf_norm(F) < options.residual_tolerance else STALLED
        return finish(status, 0, F, 0.0, 0.0)

    lam = options.lambda_init
    cost = float(F @ F)
    eye = np.eye(system.n)

    for iteration in range(1, cap + 1):
        J = system.jacobian(x)
        if not np.all(np.isfinite(J)):
            return finish(SINGULAR, iteration, F, 0.0, lam, "non-finite Jacobian")
        if check_singular and iteration == 1:
            # degenerate starting geometry; later rank loss is left to the damping
            sigma = scipy.linalg.svdvals(J)
            if sigma.size < system.n or sigma[-1] <= options.singular_rcond * max(sigma[0], 1.0):
                return finish(SINGULAR, iteration, F, 0.0, lam,
                              f"rank-deficient Jacobian (sigma_min={sigma[-1] if sigma.size else 0.0:.3e})")

        A = J.T @ J
        g = J.T @ F
        f_norm = _inf_norm(F)
        if f_norm >= options.residual_tolerance and _inf_norm(g) < options.gradient_tolerance:
            return finish(STALLED, iteration, F, 0.0, lam, "stationary point with non-zero residual")

        while True:
            try:
                factor = scipy.linalg.cho_factor(A + lam * eye)
                dx = scipy.linalg.cho_solve(factor, -g)
            except (np.linalg.LinAlgError, ValueError):
                dx = None
            if dx is not None and np.all(np.isfinite(dx)):
                dx_norm = _inf_norm(dx)
                x_try = x + dx
                F_try = system.residual(x_try)
                cost_try = float(F_try @ F_try) if np.all(np.isfinite(F_try)) else float("inf")
                if dx_norm < options.step_tolerance:
                    if f_norm < options.residual_tolerance:
                        if cost_try <= cost:
                            x, F = x_try, F_try
                        return finish(CONVERGED, iteration, F, dx_norm, lam)
                    if cost_try >= cost and lam <= 1.0:
                        return finish(STALLED, iteration, F, dx_norm, lam, "stationary point with non-zero residual")
                if cost_try < cost:
                    x = x_try
                    system.rebase_gauges(x)
                    F = system.residual(x)
                    cost = float(F @ F)
                    lam = max(lam / options.lambda_factor, options.lambda_min)
                    if trace:
                        logger.debug(f"[LM] it={iteration} |F|={_inf_norm(F):.3e} |dx|={dx_norm:.3e} lambda={lam:.1e}")
                    if _inf_norm(F) < options.residual_tolerance and dx_norm < options.step_tolerance:
                        return finish(CONVERGED, iteration, F, dx_norm, lam)
                    break
            if lam >= options.lambda_max:
                if f_norm < options.residual_tolerance:
                    return finish(CONVERGED, iteration, F, 0.0, lam)
                return finish(STALLED, iteration, F, 0.0, lam, "step rejected at maximum damping")
            lam = min(lam * options.lambda_factor, options.lambda_max)

    logger.debug(f"[LM] Iteration cap {cap} reached, |F|={_inf_norm(F):.3e}")
    return finish(NO_CONVERGENCE, cap, F, 0.0, lam, "no convergence")
