"""
Collision (steric clash) detection for cluster structures.

Two non-bonded atoms i, j clash when their distance does not exceed
blow_factor * (r_i + r_j). The naive engine compares all pairs and is the
ground truth; the grid engine bins atoms into cubic cells and only compares
atoms in the same or in neighboring cells.
"""

import itertools
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Set, Tuple

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import connected_components
from scipy.spatial.distance import cdist

from .bonds import BondTable
from .interfaces import ClashStrengthScorer
from .properties import AtomicProperties, DEFAULT_PROPERTIES

logger = logging.getLogger(__name__)


DEFAULT_STRENGTH = 42.0
DEFAULT_CELL_SIZE = 7.0
FAR_DISTANCE = 1e6

# Half of the 26 neighbor offsets; together with the cell itself they
# enumerate every unordered pair of adjacent cells exactly once.
FORWARD_OFFSETS: Tuple[Tuple[int, int, int], ...] = tuple(
    offset for offset in itertools.product((-1, 0, 1), repeat=3)
    if offset > (0, 0, 0)
)


@dataclass(frozen=True)
class ClashRecord:
    """A single clash between atoms i < j."""
    i: int
    j: int
    strength: float

    @property
    def pair(self) -> Tuple[int, int]:
        return (self.i, self.j)


@dataclass
class ClashReport:
    """
    Result of a collision check.

    Attributes:
        distances: Symmetric (n, n) distance matrix; pairs that were never
            compared hold FAR_DISTANCE
        clashes: Detected clashes
        first_clash_only: True if detection stopped at the first clash
        complete: True if every atom pair was compared
    """
    distances: np.ndarray
    clashes: List[ClashRecord] = field(default_factory=list)
    first_clash_only: bool = False
    complete: bool = True

    @property
    def has_clash(self) -> bool:
        return len(self.clashes) > 0

    def pairs(self) -> Set[Tuple[int, int]]:
        return {record.pair for record in self.clashes}

    def total_strength(self) -> float:
        return float(sum(record.strength for record in self.clashes))


class ConstantStrengthScorer:
    """Every clash gets the same strength."""

    def __init__(self, strength: float = DEFAULT_STRENGTH):
        self.strength = strength

    def score(self, i: int, j: int, blown_radius_sum: float, distance: float) -> float:
        return self.strength


class OverlapStrengthScorer:
    """Strength grows with the overlap of the blown radii."""

    def score(self, i: int, j: int, blown_radius_sum: float, distance: float) -> float:
        return blown_radius_sum - distance


SCORERS = {
    'constant': ConstantStrengthScorer,
    'overlap': OverlapStrengthScorer,
}


class CollisionEngine:
    """
    Base class for clash detectors.

    Subclasses implement detect_coordinates; structure-level calls rebuild
    Cartesian coordinates and default to the structure's own bond table.
    """

    def __init__(
        self,
        scorer: Optional[ClashStrengthScorer] = None,
        properties: AtomicProperties = DEFAULT_PROPERTIES,
        first_clash_only: bool = False
    ):
        self.scorer = scorer if scorer is not None else ConstantStrengthScorer()
        self.properties = properties
        self.first_clash_only = first_clash_only

    def detect(self, structure, blow_factor: float, bonds: Optional[BondTable] = None,
               first_clash_only: Optional[bool] = None) -> ClashReport:
        """
        Detect clashes in a structure.

        Args:
            structure: Structure to check
            blow_factor: Scaling of the covalent radius sum
            bonds: Bond table to honor, defaults to structure.bonds
            first_clash_only: Override the engine's detection mode

        Returns:
            ClashReport for the structure's atoms
        """
        return self.detect_coordinates(
            structure.cartesian(self.properties),
            structure.atomic_numbers(),
            blow_factor,
            structure.bonds if bonds is None else bonds,
            first_clash_only,
        )

    def has_clash(self, structure, blow_factor: float,
                  bonds: Optional[BondTable] = None) -> bool:
        return self.detect(structure, blow_factor, bonds, first_clash_only=True).has_clash

    def detect_coordinates(
        self,
        coords: np.ndarray,
        atomic_numbers: Sequence[int],
        blow_factor: float,
        bonds: Optional[BondTable] = None,
        first_clash_only: Optional[bool] = None
    ) -> ClashReport:
        raise NotImplementedError

    def _prepare(self, coords, atomic_numbers, bonds, first_clash_only):
        coords = np.asarray(coords, dtype=float).reshape(-1, 3)
        n = len(coords)
        if len(atomic_numbers) != n:
            raise ValueError(f"Got {len(atomic_numbers)} atomic numbers for {n} atoms")
        if bonds is not None and not bonds.size_compatible(n):
            raise ValueError(f"Bond table covers {bonds.n_atoms} atoms, got {n}")
        radii = np.asarray(self.properties.radii(atomic_numbers), dtype=float)
        bonded = bonds.matrix if bonds is not None else np.zeros((n, n), dtype=bool)
        first_only = self.first_clash_only if first_clash_only is None else first_clash_only
        return coords, radii, bonded, first_only

    def _scan_block(
        self,
        rows: np.ndarray,
        cols: np.ndarray,
        block: np.ndarray,
        radii: np.ndarray,
        bonded: np.ndarray,
        blow_factor: float,
        upper_only: bool,
        clashes: List[ClashRecord],
        first_only: bool
    ) -> bool:
        """
        Apply the clash rule to a block of distances between two atom sets.

        Returns True if scanning should stop (first clash found).
        """
        limits = blow_factor * (radii[rows][:, None] + radii[cols][None, :])
        hits = (block <= limits) & ~bonded[np.ix_(rows, cols)]
        if upper_only:
            hits &= np.triu(np.ones_like(hits, dtype=bool), k=1)
        for a, b in zip(*np.nonzero(hits)):
            i, j = int(rows[a]), int(cols[b])
            if i > j:
                i, j = j, i
            strength = self.scorer.score(i, j, float(limits[a, b]), float(block[a, b]))
            clashes.append(ClashRecord(i, j, strength))
            if first_only:
                return True
        return False


class NaivePairwiseEngine(CollisionEngine):
    """Compares every atom pair, O(N^2)."""

    def detect_coordinates(self, coords, atomic_numbers, blow_factor, bonds=None,
                           first_clash_only=None) -> ClashReport:
        coords, radii, bonded, first_only = self._prepare(
            coords, atomic_numbers, bonds, first_clash_only
        )
        distances = cdist(coords, coords)
        clashes: List[ClashRecord] = []
        index = np.arange(len(coords))
        self._scan_block(index, index, distances, radii, bonded, blow_factor,
                         True, clashes, first_only)
        logger.debug(f"Naive collision check: {len(coords)} atoms, {len(clashes)} clashes")
        return ClashReport(distances, clashes, first_only, complete=True)


class GridCollisionEngine(CollisionEngine):
    """
    Spatially partitioned clash detector, O(N) on average.

    The cell edge is at least the largest possible blown radius sum, so atoms
    in non-adjacent cells can never clash.
    """

    def __init__(
        self,
        cell_size: float = DEFAULT_CELL_SIZE,
        scorer: Optional[ClashStrengthScorer] = None,
        properties: AtomicProperties = DEFAULT_PROPERTIES,
        first_clash_only: bool = False
    ):
        super().__init__(scorer, properties, first_clash_only)
        if cell_size <= 0.0:
            raise ValueError(f"Cell size must be positive, got {cell_size}")
        self.cell_size = cell_size

    def build_cells(self, coords: np.ndarray, edge: float) -> Dict[Tuple[int, int, int], List[int]]:
        """Assign each atom to the cubic cell containing it."""
        origin = coords.min(axis=0)
        cell_index = np.floor((coords - origin) / edge).astype(int)
        cells: Dict[Tuple[int, int, int], List[int]] = {}
        for atom, key in enumerate(map(tuple, cell_index)):
            cells.setdefault(key, []).append(atom)
        return cells

    def detect_coordinates(self, coords, atomic_numbers, blow_factor, bonds=None,
                           first_clash_only=None) -> ClashReport:
        coords, radii, bonded, first_only = self._prepare(
            coords, atomic_numbers, bonds, first_clash_only
        )
        n = len(coords)
        distances = np.full((n, n), FAR_DISTANCE)
        np.fill_diagonal(distances, 0.0)
        clashes: List[ClashRecord] = []
        if n < 2:
            return ClashReport(distances, clashes, first_only, complete=True)

        edge = max(self.cell_size, 2.0 * blow_factor * float(radii.max()))
        cells = self.build_cells(coords, edge)
        compared = 0

        for key in sorted(cells):
            atoms = np.asarray(cells[key])
            block = cdist(coords[atoms], coords[atoms])
            distances[np.ix_(atoms, atoms)] = block
            compared += len(atoms) * (len(atoms) - 1) // 2
            if self._scan_block(atoms, atoms, block, radii, bonded, blow_factor,
                                True, clashes, first_only):
                return ClashReport(distances, clashes, first_only, complete=False)

            for offset in FORWARD_OFFSETS:
                neighbor = (key[0] + offset[0], key[1] + offset[1], key[2] + offset[2])
                if neighbor not in cells:
                    continue
                others = np.asarray(cells[neighbor])
                block = cdist(coords[atoms], coords[others])
                distances[np.ix_(atoms, others)] = block
                distances[np.ix_(others, atoms)] = block.T
                compared += len(atoms) * len(others)
                if self._scan_block(atoms, others, block, radii, bonded, blow_factor,
                                    False, clashes, first_only):
                    return ClashReport(distances, clashes, first_only, complete=False)

        complete = compared == n * (n - 1) // 2
        logger.debug(
            f"Grid collision check: {n} atoms in {len(cells)} cells (edge {edge:.2f}), "
            f"{len(clashes)} clashes"
        )
        return ClashReport(distances, clashes, first_only, complete=complete)


ENGINES = {
    'simplepairwise': (NaivePairwiseEngine, True),
    'advancedpairwise': (NaivePairwiseEngine, False),
    'simplegrid': (GridCollisionEngine, True),
    'advancedgrid': (GridCollisionEngine, False),
}


def make_collision_engine(
    name: str = 'advancedgrid',
    cell_size: float = DEFAULT_CELL_SIZE,
    scorer: Optional[ClashStrengthScorer] = None,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> CollisionEngine:
    """
    Create a collision engine by name.

    Args:
        name: simplepairwise, advancedpairwise, simplegrid or advancedgrid
        cell_size: Grid cell edge in bohr (grid engines only)
        scorer: Clash strength scorer
        properties: Radius lookup table

    Returns:
        Configured CollisionEngine

    Raises:
        ValueError: If the name is unknown
    """
    key = name.strip().lower()
    if key not in ENGINES:
        raise ValueError(f"Unknown collision engine: {name}. Choose from {sorted(ENGINES)}")
    engine_class, first_only = ENGINES[key]
    if engine_class is GridCollisionEngine:
        return GridCollisionEngine(cell_size, scorer, properties, first_only)
    return engine_class(scorer, properties, first_only)


def make_scorer(name: str) -> ClashStrengthScorer:
    key = name.strip().lower()
    if key not in SCORERS:
        raise ValueError(f"Unknown clash scorer: {name}. Choose from {sorted(SCORERS)}")
    return SCORERS[key]()


def count_fragments_apart(
    coords: np.ndarray,
    atomic_numbers: Sequence[int],
    blow_factor: float,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> int:
    """Number of connected components of the blown-radius contact graph."""
    coords = np.asarray(coords, dtype=float).reshape(-1, 3)
    if len(coords) == 0:
        return 0
    radii = np.asarray(properties.radii(atomic_numbers), dtype=float)
    contact = cdist(coords, coords) <= blow_factor * (radii[:, None] + radii[None, :])
    n_components, _ = connected_components(csr_matrix(contact), directed=False)
    return int(n_components)


def is_dissociated(
    coords: np.ndarray,
    atomic_numbers: Sequence[int],
    blow_factor: float,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> bool:
    """
    True if the cluster falls apart into more than one piece.

    Atoms are connected when their distance does not exceed
    blow_factor * (r_i + r_j).
    """
    return count_fragments_apart(coords, atomic_numbers, blow_factor, properties) > 1
