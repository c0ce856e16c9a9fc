"""
Rigid-body refinement of crossover children.

The fragments a child received from the other parent (its exchanged shell)
are first pushed radially outward until nothing clashes, then rotated and
scaled as one rigid unit by a derivative-free optimizer that minimizes the
backend energy under a collision/dissociation penalty.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from .collision import CollisionEngine, is_dissociated
from .data_models import Structure
from .geometry import rotation_matrix
from .interfaces import DerivativeFreeOptimizer, EnergyBackend
from .properties import AtomicProperties, DEFAULT_PROPERTIES

logger = logging.getLogger(__name__)


PENALTY_ENERGY = 1e10

ROTATION_BOUNDS = (
    (-math.pi, math.pi),
    (-0.5 * math.pi, 0.5 * math.pi),
    (-math.pi, math.pi),
)


class RefinementState(Enum):
    INIT = "init"
    INFLATING = "inflating"
    INFLATION_FAILED = "inflation_failed"
    OPTIMIZING = "optimizing"
    DONE = "done"


@dataclass
class RefinementConfig:
    """
    Settings for RigidRefinement.

    Attributes:
        enabled: Run refinement on crossover children
        inflate: Run the inflate-until-collision-free stage
        optimize: Run the 6-D rigid-body optimization stage
        max_inflation: Largest radial inflation factor tried
        inflation_increment: Inflation step
        min_scale: Lower bound of the per-axis radial scaling
        max_scale: Upper bound of the per-axis radial scaling
        blow_collision: Blow factor for clash checks
        blow_dissociation: Blow factor for dissociation checks
        initial_trust: Initial trust radius (normalized units)
        stopping_trust: Final trust radius (normalized units)
        max_iterations: Objective evaluation budget
        penalty_energy: Objective value for colliding configurations
    """
    enabled: bool = False
    inflate: bool = True
    optimize: bool = True
    max_inflation: float = 1.3
    inflation_increment: float = 0.05
    min_scale: float = 0.8
    max_scale: float = 1.5
    blow_collision: float = 1.0
    blow_dissociation: float = 3.0
    initial_trust: float = 0.1
    stopping_trust: float = 1e-5
    max_iterations: int = 250
    penalty_energy: float = PENALTY_ENERGY

    def __post_init__(self):
        if self.inflation_increment <= 0.0:
            raise ValueError("inflation_increment must be positive")
        if self.max_inflation < 1.0:
            raise ValueError("max_inflation must be at least 1.0")
        if not 0.0 < self.min_scale <= 1.0 <= self.max_scale:
            raise ValueError("Scaling box must satisfy 0 < min_scale <= 1 <= max_scale")
        if not 0.0 < self.stopping_trust <= self.initial_trust:
            raise ValueError("Trust radii must satisfy 0 < stopping_trust <= initial_trust")
        if self.max_iterations < 1:
            raise ValueError("max_iterations must be at least 1")

    def bounds(self) -> List[Tuple[float, float]]:
        """Search box: three Euler angles, then three radial scaling factors."""
        return list(ROTATION_BOUNDS) + [(self.min_scale, self.max_scale)] * 3


@dataclass
class RefinementResult:
    """
    Outcome of a refinement run.

    Attributes:
        structure: Refined structure (the input object, modified in place)
        state: Final state
        states: Visited states in order
        energy: Best objective value, None if no optimization ran
        inflation: Inflation factor applied to the exchanged shell
        evaluations: Number of objective evaluations
        notes: Human-readable operation notes
    """
    structure: Structure
    state: RefinementState = RefinementState.INIT
    states: List[RefinementState] = field(default_factory=lambda: [RefinementState.INIT])
    energy: Optional[float] = None
    inflation: float = 1.0
    evaluations: int = 0
    notes: List[str] = field(default_factory=list)

    def enter(self, state: RefinementState):
        self.state = state
        self.states.append(state)


class ScipyTrustRegionOptimizer:
    """
    Derivative-free bounded minimizer backed by SciPy's COBYLA.

    The search box is mapped onto the unit cube; trust radii are given in
    those normalized units. The best point ever evaluated is returned.
    """

    def __init__(self, initial_trust: float = 0.1, stopping_trust: float = 1e-5,
                 max_iterations: int = 250):
        self.initial_trust = initial_trust
        self.stopping_trust = stopping_trust
        self.max_iterations = max_iterations

    def minimize(
        self,
        initial_point: np.ndarray,
        objective: Callable[[np.ndarray], float],
        bounds: Sequence[Tuple[float, float]]
    ) -> Tuple[float, np.ndarray]:
        lower = np.array([b[0] for b in bounds], dtype=float)
        upper = np.array([b[1] for b in bounds], dtype=float)
        span = upper - lower
        best = {'value': math.inf, 'point': np.asarray(initial_point, dtype=float).copy()}

        def normalized(x):
            point = lower + np.clip(x, 0.0, 1.0) * span
            value = float(objective(point))
            if value < best['value']:
                best['value'] = value
                best['point'] = point.copy()
            return value

        x0 = np.clip((np.asarray(initial_point, dtype=float) - lower) / span, 0.0, 1.0)
        minimize(
            normalized,
            x0,
            method='COBYLA',
            bounds=[(0.0, 1.0)] * len(x0),
            options={
                'rhobeg': self.initial_trust,
                'tol': self.stopping_trust,
                'maxiter': self.max_iterations,
            },
        )
        return best['value'], best['point']


class RigidRefinement:
    """
    Inflate, then rigidly optimize, the exchanged shell of a child.

    State machine: INIT -> (INFLATING -> INFLATION_FAILED) | (INFLATING)
    -> (OPTIMIZING) -> DONE. Inflation failure is not an error; the
    structure is returned with its original exchanged COMs.
    """

    def __init__(
        self,
        config: RefinementConfig,
        collision_engine: CollisionEngine,
        backend: Optional[EnergyBackend] = None,
        optimizer: Optional[DerivativeFreeOptimizer] = None,
        properties: AtomicProperties = DEFAULT_PROPERTIES
    ):
        self.config = config
        self.collision_engine = collision_engine
        self.backend = backend
        self.optimizer = optimizer if optimizer is not None else ScipyTrustRegionOptimizer(
            config.initial_trust, config.stopping_trust, config.max_iterations
        )
        self.properties = properties

    def has_clash(self, structure: Structure) -> bool:
        return self.collision_engine.has_clash(structure, self.config.blow_collision)

    def refine(self, structure: Structure, exchanged: Sequence[int]) -> RefinementResult:
        """
        Refine the exchanged fragments of a structure in place.

        Args:
            structure: Child structure
            exchanged: Positions of the fragments that came from the other parent

        Returns:
            RefinementResult describing what happened
        """
        result = RefinementResult(structure=structure)
        exchanged = list(exchanged)
        if not exchanged:
            result.notes.append("refine: no exchanged fragments")
            result.enter(RefinementState.DONE)
            return result

        if self.config.inflate:
            result.enter(RefinementState.INFLATING)
            if not self.inflate(structure, exchanged, result):
                result.enter(RefinementState.INFLATION_FAILED)
                return result

        if self.config.optimize:
            result.enter(RefinementState.OPTIMIZING)
            self.optimize(structure, exchanged, result)

        result.enter(RefinementState.DONE)
        return result

    def inflate(self, structure: Structure, exchanged: List[int],
                result: RefinementResult) -> bool:
        """Scale exchanged COMs outward until clash free; restore them on failure."""
        base = np.array([structure.fragments[i].com for i in exchanged])
        inflation = 1.0
        while self.has_clash(structure):
            inflation += self.config.inflation_increment
            if inflation > self.config.max_inflation + 1e-12:
                for position, com in zip(exchanged, base):
                    structure.fragments[position].com = com
                logger.info(
                    f"Structure {structure.id}: no clash-free inflation up to "
                    f"{self.config.max_inflation}"
                )
                result.notes.append(
                    f"refine: inflation failed up to factor {self.config.max_inflation}"
                )
                return False
            for position, com in zip(exchanged, base):
                structure.fragments[position].com = inflation * com

        result.inflation = inflation
        result.notes.append(f"refine: clash free at inflation {inflation:.2f}")
        return True

    def _apply(self, structure: Structure, exchanged: List[int], base: np.ndarray,
               point: np.ndarray):
        matrix = rotation_matrix(point[0:3])
        scaled = base * point[3:6]
        for position, com in zip(exchanged, scaled):
            structure.fragments[position].com = matrix @ com

    def objective(self, structure: Structure, exchanged: List[int], base: np.ndarray,
                  iteration: int = 0) -> Callable[[np.ndarray], float]:
        """
        Objective over (phi, omega, psi, sx, sy, sz) for the exchanged shell.

        Colliding configurations score penalty_energy, dissociated ones half
        of it. Without a backend every valid configuration scores 0.0.
        """
        work = structure.copy()
        atomic_numbers = work.atomic_numbers()
        counter = {'iteration': iteration}

        def evaluate(point: np.ndarray) -> float:
            self._apply(work, exchanged, base, point)
            coords = work.cartesian(self.properties)
            report = self.collision_engine.detect_coordinates(
                coords, atomic_numbers, self.config.blow_collision, work.bonds,
                first_clash_only=True,
            )
            if report.has_clash:
                return self.config.penalty_energy
            if is_dissociated(coords, atomic_numbers, self.config.blow_dissociation,
                              self.properties):
                return 0.5 * self.config.penalty_energy
            if self.backend is None:
                return 0.0
            counter['iteration'] += 1
            return float(self.backend.evaluate(
                work.id,
                counter['iteration'],
                coords.T.ravel(),
                work.labels(),
                atomic_numbers,
                work.fragment_sizes(),
                None,
                work.n_atoms,
                work.charges(),
                work.spins(),
                work.bonds,
            ))

        return evaluate

    def optimize(self, structure: Structure, exchanged: List[int], result: RefinementResult):
        base = np.array([structure.fragments[i].com for i in exchanged])
        start = np.array([0.0, 0.0, 0.0, 1.0, 1.0, 1.0])
        evaluations = {'count': 0}
        inner = self.objective(structure, exchanged, base)

        def counted(point):
            evaluations['count'] += 1
            return inner(point)

        best_value, best_point = self.optimizer.minimize(start, counted, self.config.bounds())
        self._apply(structure, exchanged, base, np.asarray(best_point, dtype=float))
        result.energy = float(best_value)
        result.evaluations = evaluations['count']
        logger.debug(
            f"Structure {structure.id}: rigid optimization best {best_value:.6g} "
            f"after {evaluations['count']} evaluations"
        )
        result.notes.append(
            f"refine: optimized shell of {len(exchanged)} fragments, best {best_value:.6g}"
        )
