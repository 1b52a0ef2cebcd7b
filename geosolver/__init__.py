"""
GeoSolver - Geometric Constraint Solver
"""

from .geometry import EntityType, layout

from .entity_store import (
    EntityStore, EntityHandle, Entity, StoreSnapshot,
    StaleHandleError, EntityFixedError,
)

from .constraints import (
    Constraint, ConstraintKind, ConstraintSet, ConstraintDefinitionError, AngleUnit,
    make_fixed, make_coincident, make_distance, make_horizontal, make_vertical,
    make_parallel, make_perpendicular, make_angle, make_tangent,
    make_point_on_line, make_point_on_plane, make_point_on_circle,
    make_radius, make_equal_radius, make_concentric, make_arc_endpoint,
    make_symmetric, make_on_curve, make_curve_tangent,
)

from .joints import JointLimitPolicy, make_revolute, make_prismatic, make_cylindrical, joint_angle, joint_distance

from .kernel import CurveEvaluator, KernelUnavailableError

from .dof_analysis import DOFAnalyzer, DOFAnalysis, DOFStatus
from .decomposition import ClusterDecomposer, Cluster, Decomposition

from .solver_interface import SolverOptions, SolveStatus, ClusterResult, SolveReport, CancellationToken
from .solver import ConstraintSolver
from .solver_incremental import IncrementalSolveController, DragResult, BackgroundSolve
from .constraint_diagnostics import DiagnosticsReporter, Diagnosis, DiagnosisType, diagnose
