"""
GeoSolver - Configuration Module
================================

Central configuration for solver tolerances and runtime switches.
"""

from .tolerances import (
    Tolerances, solver_residual_tolerance, solver_step_tolerance,
    solver_max_iterations, drag_max_iterations,
)
from .feature_flags import is_enabled, set_flag, get_all_flags, FEATURE_FLAGS, FEATURE_FLAG_DEFAULTS
