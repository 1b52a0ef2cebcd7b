import pytest

from config.feature_flags import FEATURE_FLAG_DEFAULTS, set_flag
from geosolver import (
    ConstraintSet, EntityStore, make_distance, make_horizontal, make_vertical,
)


@pytest.fixture(autouse=True)
def _global_feature_flag_isolation():
    """
    Every test starts (and ends) with the default feature flags, so a test
    switching e.g. solver_parallel_clusters off cannot leak into the next.
    """
    for key, value in FEATURE_FLAG_DEFAULTS.items():
        set_flag(key, value)

    yield

    for key, value in FEATURE_FLAG_DEFAULTS.items():
        set_flag(key, value)


@pytest.fixture
def store() -> EntityStore:
    return EntityStore()


@pytest.fixture
def constraints(store) -> ConstraintSet:
    return ConstraintSet(store)


@pytest.fixture
def chain_sketch(store, constraints):
    """
    P1 fixed at the origin, P2 50 to the right of it, P3 30 above P2.

    Returns (store, constraints, (p1, p2, p3)).
    """
    p1 = store.add_point2d(0, 0, fixed=True, id="P1")
    p2 = store.add_point2d(40, 10, id="P2")
    p3 = store.add_point2d(45, 25, id="P3")
    constraints.add(make_distance(p1, p2, 50))
    constraints.add(make_horizontal(p1, p2))
    constraints.add(make_distance(p2, p3, 30))
    constraints.add(make_vertical(p2, p3))
    return store, constraints, (p1, p2, p3)

