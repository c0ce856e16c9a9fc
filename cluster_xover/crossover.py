"""
Spatial crossover operators for cluster structures.

Both parents are cut by the same kind of primitive (plane or sphere). The
father's cut is random; the mother's cut is chosen so that both parents
have the same number of fragments above it. After stoichiometry repair of
the mother, the fragments above the cuts are exchanged between the
children, species by species, position by position.
"""

import logging
import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np

from .collision import CollisionEngine, make_collision_engine, make_scorer
from .cut_utils import (
    CutPrimitive,
    DEFAULT_TOLERANCE,
    draw_valid_cut,
    find_order_statistic_cut,
    make_cut_primitive,
    partition,
    species_counts,
)
from .data_models import FITNESS_UNEVALUATED, InvariantViolation, Structure
from .geometry import random_rotation_matrix
from .interfaces import EnergyBackend
from .properties import AtomicProperties, DEFAULT_PROPERTIES
from .refinement import RefinementConfig, RigidRefinement
from .repair import repair_stoichiometry

logger = logging.getLogger(__name__)


Children = Tuple[Structure, Structure]


@dataclass
class CrossoverStatistics:
    """
    Running tally of crossover outcomes for one operator.

    Updates go through the record_* methods, which hold a lock, so one
    operator may be shared between worker threads.

    Attributes:
        attempts: Number of crossover calls
        successes: Calls that produced children
        failures: Failure reason -> count
        repair_swaps: Total repair swaps over all calls
    """
    attempts: int = 0
    successes: int = 0
    failures: Counter = field(default_factory=Counter)
    repair_swaps: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def record_attempt(self):
        with self._lock:
            self.attempts += 1

    def record_success(self):
        with self._lock:
            self.successes += 1

    def record_failure(self, reason: str):
        with self._lock:
            self.failures[reason] += 1

    def record_repair_swaps(self, swaps: int):
        with self._lock:
            self.repair_swaps += swaps

    @property
    def success_rate(self) -> float:
        return self.successes / self.attempts if self.attempts else 0.0

    def summary(self) -> Dict:
        with self._lock:
            return {
                'attempts': self.attempts,
                'successes': self.successes,
                'success_rate': self.success_rate,
                'failures': dict(self.failures),
                'repair_swaps': self.repair_swaps,
            }


def check_parents(mother: Structure, father: Structure):
    """
    Raise InvariantViolation if two parents cannot be crossed.

    Parents must have the same fragment count, the same species multiset
    and bond tables covering all their atoms.
    """
    mother.check_bonds()
    father.check_bonds()
    if mother.n_fragments != father.n_fragments:
        raise InvariantViolation(
            f"Parents differ in fragment count: mother {mother.n_fragments}, "
            f"father {father.n_fragments}"
        )
    if mother.species_counts() != father.species_counts():
        raise InvariantViolation(
            f"Parents differ in stoichiometry: mother {dict(mother.species_counts())}, "
            f"father {dict(father.species_counts())}"
        )


def check_structural_consistency(child: Structure, parent: Structure) -> bool:
    """
    Check that a child has its parent's layout.

    Fragment count, species and atoms at every position must match, and the
    bond table must cover every atom.

    Args:
        child: Child structure
        parent: Parent whose array layout the child inherited

    Returns:
        True if consistent
    """
    if child.n_fragments != parent.n_fragments:
        logger.error(
            f"Child {child.id} has {child.n_fragments} fragments, "
            f"parent {parent.id} has {parent.n_fragments}"
        )
        return False
    for position, (mine, theirs) in enumerate(zip(child.fragments, parent.fragments)):
        if not mine.same_layout(theirs):
            logger.error(
                f"Child {child.id} fragment {position} is {mine.species_id}, "
                f"parent has {theirs.species_id}"
            )
            return False
    if not child.bonds.size_compatible(child.n_atoms):
        logger.error(f"Child {child.id} bond table does not cover its atoms")
        return False
    return True


class SpatialCrossover:
    """
    Plane- or sphere-cut crossover of two cluster structures.

    The random generator and property table are injected. The statistics
    tally is mutable state shared by every call; its updates are locked.
    The generator is not thread safe, so concurrent workers each need an
    operator built with their own generator.
    """

    def __init__(
        self,
        cut: CutPrimitive,
        rng: np.random.Generator,
        properties: AtomicProperties = DEFAULT_PROPERTIES,
        random_rotation: bool = False,
        adjust_exchanged: bool = True,
        max_attempts: int = 1000,
        tolerance: float = DEFAULT_TOLERANCE,
        refinement: Optional[RigidRefinement] = None,
        collision_engine: Optional[CollisionEngine] = None,
        blow_factor: float = 1.0,
        reject_clashing: bool = False
    ):
        if max_attempts < 1:
            raise ValueError(f"max_attempts must be at least 1, got {max_attempts}")
        if reject_clashing and collision_engine is None:
            raise ValueError("reject_clashing requires a collision engine")
        self.cut = cut
        self.rng = rng
        self.properties = properties
        self.random_rotation = random_rotation
        self.adjust_exchanged = adjust_exchanged
        self.max_attempts = max_attempts
        self.tolerance = tolerance
        self.refinement = refinement
        self.collision_engine = collision_engine
        self.blow_factor = blow_factor
        self.reject_clashing = reject_clashing
        self.statistics = CrossoverStatistics()

    def _fail(self, reason: str, message: str, level: int = logging.INFO) -> None:
        self.statistics.record_failure(reason)
        logger.log(level, message)
        return None

    def crossover(self, mother: Structure, father: Structure,
                  child_id: int) -> Optional[Children]:
        """
        Cross two parents.

        Child 1 inherits the father's layout with the mother's exchanged
        fragments placed into it; child 2 the other way round.

        Args:
            mother: Mother structure (not modified)
            father: Father structure (not modified)
            child_id: Id given to both children

        Returns:
            (child1, child2), or None if no valid cut or exchange was found

        Raises:
            InvariantViolation: If the parents do not share a layout
        """
        self.statistics.record_attempt()
        check_parents(mother, father)

        if mother.n_fragments < 2:
            logger.debug("Single-fragment parents, returning clones")
            self.statistics.record_success()
            return father.copy(), mother.copy()

        notes: List[str] = [f"crossover: {self.cut.describe()}"]
        father_work = father.copy()
        mother_work = mother.copy()
        for work in (father_work, mother_work):
            work.move_to_com(self.properties)
            if self.random_rotation:
                work.rotate_about_origin(random_rotation_matrix(self.rng))
        if self.random_rotation:
            notes.append("crossover: random pre-rotation of both parents")

        father_values = self.cut.coordinates(father_work)
        father_cut = draw_valid_cut(self.cut, father_values, self.rng, self.max_attempts)
        if father_cut is None:
            return self._fail('no_cut', f"No valid father cut in {self.max_attempts} draws")
        father_keep, father_exchange = partition(father_values, father_cut)

        mother_values = self.cut.coordinates(mother_work)
        mother_cut = find_order_statistic_cut(mother_values, len(father_keep), self.tolerance)
        if mother_cut is None:
            return self._fail('degenerate', "Degenerate order statistic in mother cut search")
        mother_keep, mother_exchange = partition(mother_values, mother_cut)

        if len(father_keep) != len(mother_keep) or len(father_exchange) != len(mother_exchange):
            return self._fail(
                'partition_mismatch',
                f"Partition mismatch: father {len(father_keep)}/{len(father_exchange)}, "
                f"mother {len(mother_keep)}/{len(mother_exchange)}",
                logging.ERROR,
            )

        father_counts = species_counts(father_work, father_exchange)
        outcome = repair_stoichiometry(
            mother_work, mother_keep, mother_exchange, father_counts, self.rng
        )
        notes.extend(outcome.notes)
        self.statistics.record_repair_swaps(outcome.swaps)

        mother_keep, mother_exchange = partition(self.cut.coordinates(mother_work), mother_cut)
        if species_counts(mother_work, mother_exchange) != father_counts:
            return self._fail(
                'repair_mismatch',
                f"Species counts differ after repair: father {dict(father_counts)}, "
                f"mother {dict(species_counts(mother_work, mother_exchange))}",
                logging.ERROR,
            )

        children = self._exchange(father_work, mother_work, father_exchange, mother_exchange,
                                  father_cut, mother_cut)
        if children is None:
            return self._fail('exchange_mismatch', "Exchange bookkeeping mismatch",
                              logging.ERROR)
        child1, child2 = children
        notes.append(
            f"crossover: exchanged {len(father_exchange)} of {father.n_fragments} fragments, "
            f"cuts father {father_cut:.4f} mother {mother_cut:.4f}"
        )

        for child in (child1, child2):
            child.reassign_fragment_ids()
            child.id = child_id
            child.father_id = father.id
            child.mother_id = mother.id
            child.fitness = FITNESS_UNEVALUATED
            child.metadata = {
                'crossover_notes': list(notes),
                'crossover_strategy': self.cut.name,
                'father_cut': float(father_cut),
                'mother_cut': float(mother_cut),
                'repair_swaps': outcome.swaps,
            }

        if mother_work.environment is not None:
            env1, env2 = mother_work.environment.create_offspring(father_work.environment)
            child1.environment, child2.environment = env1, env2

        for child, parent in ((child1, father), (child2, mother)):
            if child.species_counts() != parent.species_counts():
                raise InvariantViolation(
                    f"Child {child.id} species multiset drifted: {dict(child.species_counts())}, "
                    f"parent {parent.id} has {dict(parent.species_counts())}"
                )
        if not (check_structural_consistency(child1, father)
                and check_structural_consistency(child2, mother)):
            return self._fail('inconsistent', "Children failed the consistency check",
                              logging.ERROR)

        if self.refinement is not None:
            for child, exchanged in ((child1, father_exchange), (child2, mother_exchange)):
                result = self.refinement.refine(child, exchanged)
                child.metadata['crossover_notes'].extend(result.notes)
                child.metadata['refinement_state'] = result.state.value

        if self.collision_engine is not None:
            for child in (child1, child2):
                child.metadata['has_clash'] = self.collision_engine.has_clash(
                    child, self.blow_factor
                )
            if self.reject_clashing and (child1.metadata['has_clash']
                                         or child2.metadata['has_clash']):
                return self._fail('clash', "Crossover children clash")

        self.statistics.record_success()
        return child1, child2

    def _exchange(
        self,
        father_work: Structure,
        mother_work: Structure,
        father_exchange: List[int],
        mother_exchange: List[int],
        father_cut: float,
        mother_cut: float
    ) -> Optional[Children]:
        """
        Swap exchange-side fragments of equal species between the children.

        Each father exchange fragment is paired with the first unused mother
        exchange fragment of the same species.
        """
        child1 = father_work.copy()
        child2 = mother_work.copy()
        available: Dict[str, List[int]] = {}
        for position in mother_exchange:
            available.setdefault(mother_work.fragments[position].species_id, []).append(position)

        for f in father_exchange:
            species = father_work.fragments[f].species_id
            if not available.get(species):
                logger.error(f"No mother fragment of species {species!r} left to exchange")
                return None
            m = available[species].pop(0)

            incoming = mother_work.fragments[m].copy()
            outgoing = father_work.fragments[f].copy()
            if self.adjust_exchanged:
                self.cut.carry_over(incoming, mother_cut, father_cut)
                self.cut.carry_over(outgoing, father_cut, mother_cut)
            child1.fragments[f], child2.fragments[m] = incoming, outgoing

        if any(available.values()):
            logger.error("Unpaired mother exchange fragments remain")
            return None
        return child1, child2

    @classmethod
    def from_config(
        cls,
        config: Dict,
        rng: np.random.Generator,
        backend: Optional[EnergyBackend] = None,
        properties: AtomicProperties = DEFAULT_PROPERTIES
    ) -> "SpatialCrossover":
        """
        Build an operator from a validated configuration dictionary.

        Args:
            config: Full configuration (see config.DEFAULT_CONFIG)
            rng: Random number generator
            backend: Energy backend for refinement
            properties: Atomic property table

        Returns:
            Configured SpatialCrossover
        """
        strategy = config.get('crossover_strategy', 'plane')
        cut = make_cut_primitive(
            strategy,
            axis=config.get('plane', {}).get('axis', 'z'),
            mode=config.get('cut_mode', 'uniform'),
            gauss_width=config.get('gauss_width', 0.3),
        )

        collision_config = config.get('collision', {})
        engine = make_collision_engine(
            collision_config.get('engine', 'advancedgrid'),
            cell_size=collision_config.get('cell_size', 7.0),
            scorer=make_scorer(collision_config.get('scorer', 'constant')),
            properties=properties,
        )

        check_children = (collision_config.get('check_children', False)
                          or collision_config.get('reject_clashing', False))

        refinement = None
        refinement_config = RefinementConfig(**config.get('refinement', {}))
        if refinement_config.enabled:
            refinement = RigidRefinement(refinement_config, engine, backend,
                                         properties=properties)

        return cls(
            cut,
            rng,
            properties=properties,
            random_rotation=config.get('random_rotation', False),
            adjust_exchanged=config.get('adjust_exchanged', True),
            max_attempts=config.get('max_attempts', 1000),
            tolerance=config.get('degeneracy_tolerance', DEFAULT_TOLERANCE),
            refinement=refinement,
            collision_engine=engine if check_children else None,
            blow_factor=collision_config.get('blow_factor', 1.0),
            reject_clashing=collision_config.get('reject_clashing', False),
        )


def apply_crossover(
    mother: Structure,
    father: Structure,
    config: Dict,
    rng: np.random.Generator,
    child_id: int = 0,
    backend: Optional[EnergyBackend] = None,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> Tuple[Optional[Children], List[str]]:
    """
    Apply the configured crossover strategy to two parents.

    Args:
        mother: Mother structure
        father: Father structure
        config: Crossover configuration
        rng: Random number generator
        child_id: Id for both children
        backend: Energy backend for refinement
        properties: Atomic property table

    Returns:
        Tuple of (children or None, crossover_notes)
    """
    operator = SpatialCrossover.from_config(config, rng, backend, properties)
    children = operator.crossover(mother, father, child_id)
    if children is None:
        reasons = ", ".join(sorted(operator.statistics.failures))
        return None, [f"crossover: no children ({reasons})"]
    return children, list(children[0].metadata.get('crossover_notes', []))
