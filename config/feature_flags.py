"""
GeoSolver - Feature Flags
=========================

Feature flags allow switching solver stages at runtime, e.g. to compare
closed-form and finite-difference Jacobians or to force a single-threaded
solve while debugging.
"""

from typing import Dict

# Feature Flag Registry
# =====================
# Defaults are mirrored in FEATURE_FLAG_DEFAULTS; tests reset to these
# after every case.

FEATURE_FLAGS: Dict[str, bool] = {
    # Debug modes
    "solver_debug_logging": False,  # Per-iteration LM trace ([LM] lines, very verbose)

    # Pipeline stages
    "solver_rigid_decomposition": True,  # Rigid-subset extraction inside connected components
    "solver_parallel_clusters": True,  # Thread pool over independent components
    "solver_closed_form_jacobians": True,  # False = finite differences for every kind
    "solver_auto_diagnostics": True,  # Attach relax candidates to failed clusters
}

FEATURE_FLAG_DEFAULTS: Dict[str, bool] = dict(FEATURE_FLAGS)


def is_enabled(flag: str) -> bool:
    """
    Checks whether a feature flag is enabled.

    Args:
        flag: Name of the feature flag

    Returns:
        True if enabled, False if disabled or unknown
    """
    return FEATURE_FLAGS.get(flag, False)


def set_flag(flag: str, value: bool) -> None:
    """
    Sets a feature flag at runtime.
    Useful for tests and debugging.

    Args:
        flag: Name of the feature flag
        value: New value
    """
    FEATURE_FLAGS[flag] = value


def get_all_flags() -> Dict[str, bool]:
    """Returns a copy of all feature flags."""
    return FEATURE_FLAGS.copy()
