"""
Cluster Crossover for Evolutionary Structure Search

This package provides the variation-and-validity core of a genetic
algorithm for atomic and molecular clusters: a fragment-based structure
model, steric clash detection, and plane/sphere-cut crossover with
stoichiometry repair.

Key Features:
- Fragment-level genotype (COM, Euler orientation, optional internal coordinates)
- Naive and grid-partitioned collision engines with pluggable clash scorers
- One parameterized spatial crossover for plane and sphere cuts
- Optional rigid-body refinement of the exchanged shell
- Injected random generator and atomic property table (no global state)

Modules:
- properties: Atomic radii, weights and numbers
- geometry: Euler angles, rotations, Z-matrix conversion
- bonds: Bond table and bond perception
- data_models: Core data structures (Fragment, Structure, InternalCoordinates)
- interfaces: Protocols for energy backends, optimizers, scorers, environments
- collision: Clash detection and dissociation checks
- cut_utils: Plane/sphere cut primitives and order-statistic cut search
- repair: Stoichiometry repair on the mother structure
- crossover: Spatial crossover operator and consistency checks
- refinement: Inflation and rigid-body optimization of crossover children
- io_utils: Binary checkpoints, XYZ files, fragment decomposition
- config: YAML configuration loading, validation and operator factory
"""

__version__ = "0.1.0"
__author__ = "Cluster Search Team"

from .data_models import Fragment, Structure, InternalCoordinates, InvariantViolation
from .bonds import BondTable
from .collision import (
    ClashReport,
    GridCollisionEngine,
    NaivePairwiseEngine,
    make_collision_engine,
)
from .crossover import SpatialCrossover, apply_crossover, check_structural_consistency
from .refinement import RefinementConfig, RefinementState, RigidRefinement
from .config import ConfigValidationError, create_crossover_from_config, load_config

__all__ = [
    "Fragment",
    "Structure",
    "InternalCoordinates",
    "InvariantViolation",
    "BondTable",
    "ClashReport",
    "GridCollisionEngine",
    "NaivePairwiseEngine",
    "make_collision_engine",
    "SpatialCrossover",
    "apply_crossover",
    "check_structural_consistency",
    "RefinementConfig",
    "RefinementState",
    "RigidRefinement",
    "ConfigValidationError",
    "create_crossover_from_config",
    "load_config",
]
