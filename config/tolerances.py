"""
GeoSolver - Centralized tolerance configuration
===============================================

All numeric tolerances of the constraint solver in one place.

Tolerance philosophy:
- Residual / step: 1e-9 in document units, checked jointly
- Finite differences: relative step 1e-7 (central differences)
- Singularity: reciprocal condition number of J below 1e-10

Usage:
    from config.tolerances import Tolerances

    # Directly as class attributes
    eps = Tolerances.SOLVER_RESIDUAL

    # Or via convenience functions
    from config.tolerances import solver_residual_tolerance
    eps = solver_residual_tolerance()
"""


class Tolerances:
    """
    Central tolerance constants for GeoSolver.

    Categories:
    - SOLVER_*: Levenberg-Marquardt iteration and convergence
    - DOF_*: structural and numerical rank analysis
    - EPSILON_*: numerical stability guards
    """

    # =========================================================================
    # Levenberg-Marquardt
    # =========================================================================

    # Convergence: ||F||_inf < RESIDUAL and ||dx||_inf < STEP
    SOLVER_RESIDUAL = 1e-9
    SOLVER_STEP = 1e-9

    # Iteration caps (full solve / interactive drag frame)
    SOLVER_MAX_ITERATIONS = 100
    SOLVER_DRAG_MAX_ITERATIONS = 25

    # Damping schedule, lambda is clamped to [MIN, MAX]
    SOLVER_LAMBDA_INIT = 1e-3
    SOLVER_LAMBDA_MIN = 1e-12
    SOLVER_LAMBDA_MAX = 1e10
    SOLVER_LAMBDA_FACTOR = 10.0

    # ||J^T F||_inf below this with a non-zero residual means a stationary point
    SOLVER_GRADIENT = 1e-14

    # Relative step for central finite differences
    SOLVER_FD_STEP = 1e-7

    # sigma_min / sigma_max of J below this is a singular configuration
    SOLVER_SINGULAR_RCOND = 1e-10

    # =========================================================================
    # DOF analysis
    # =========================================================================

    # rcond for scipy.linalg.null_space when locating free entities
    DOF_NULLSPACE_RCOND = 1e-9

    # Null-space weight above which an entity still counts as free
    DOF_FREE_ENTITY = 1e-8

    # Largest seed set grown during rigid-subset extraction
    DOF_MAX_SEED_SIZE = 8

    # =========================================================================
    # Numerical epsilon values
    # =========================================================================

    # Degenerate vector length (direction of zero length)
    EPSILON_LENGTH = 1e-12

    # A constraint over fixed entities counts as satisfied below this residual
    EPSILON_RESIDUAL = 1e-9


# =============================================================================
# Convenience functions
# =============================================================================

def solver_residual_tolerance() -> float:
    """Returns the default residual tolerance."""
    return Tolerances.SOLVER_RESIDUAL


def solver_step_tolerance() -> float:
    """Returns the default step tolerance."""
    return Tolerances.SOLVER_STEP


def solver_max_iterations() -> int:
    """Returns the default iteration cap of a full solve."""
    return Tolerances.SOLVER_MAX_ITERATIONS


def drag_max_iterations() -> int:
    """Returns the iteration cap of one drag frame."""
    return Tolerances.SOLVER_DRAG_MAX_ITERATIONS


# =============================================================================
# Tolerance validation (for debugging)
# =============================================================================

def validate_tolerances():
    """
    Validates that all tolerances have sensible values.
    Useful for tests and debugging.
    """
    issues = []

    if not (Tolerances.SOLVER_LAMBDA_MIN <= Tolerances.SOLVER_LAMBDA_INIT <= Tolerances.SOLVER_LAMBDA_MAX):
        issues.append(
            f"SOLVER_LAMBDA_INIT ({Tolerances.SOLVER_LAMBDA_INIT}) outside "
            f"[{Tolerances.SOLVER_LAMBDA_MIN}, {Tolerances.SOLVER_LAMBDA_MAX}]"
        )

    if Tolerances.SOLVER_FD_STEP ** 2 > Tolerances.SOLVER_RESIDUAL * 10:
        issues.append(f"SOLVER_FD_STEP too coarse for SOLVER_RESIDUAL: {Tolerances.SOLVER_FD_STEP}")

    if Tolerances.SOLVER_DRAG_MAX_ITERATIONS > Tolerances.SOLVER_MAX_ITERATIONS:
        issues.append("SOLVER_DRAG_MAX_ITERATIONS exceeds SOLVER_MAX_ITERATIONS")

    return issues


# Validate on import (warning only, never an error)
_validation_issues = validate_tolerances()
if _validation_issues:
    from loguru import logger
    for issue in _validation_issues:
        logger.warning(f"Tolerance validation: {issue}")
