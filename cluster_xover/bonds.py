"""
Covalent bond bookkeeping.

A BondTable is a symmetric boolean relation over the global atom indices
of one Structure. The collision engines skip bonded pairs.
"""

from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.distance import cdist

from .properties import AtomicProperties, DEFAULT_PROPERTIES


class BondTable:
    """
    Symmetric adjacency matrix of covalent bonds.

    The diagonal carries no meaning for clash detection; perceived tables
    set it to True.
    """

    def __init__(self, n_atoms: int, matrix: Optional[np.ndarray] = None):
        if n_atoms < 0:
            raise ValueError(f"Atom count must be non-negative, got {n_atoms}")
        if matrix is None:
            self._matrix = np.zeros((n_atoms, n_atoms), dtype=bool)
        else:
            matrix = np.asarray(matrix, dtype=bool)
            if matrix.shape != (n_atoms, n_atoms):
                raise ValueError(
                    f"Bond matrix shape {matrix.shape} does not match {n_atoms} atoms"
                )
            self._matrix = matrix | matrix.T

    @property
    def n_atoms(self) -> int:
        return self._matrix.shape[0]

    @property
    def matrix(self) -> np.ndarray:
        """Read-only view of the adjacency matrix."""
        view = self._matrix.view()
        view.flags.writeable = False
        return view

    def has_bond(self, i: int, j: int) -> bool:
        return bool(self._matrix[i, j])

    def set_bond(self, i: int, j: int, bonded: bool = True):
        self._matrix[i, j] = bonded
        self._matrix[j, i] = bonded

    def bonds_of(self, i: int) -> List[int]:
        """Indices of all atoms bonded to atom i (excluding itself)."""
        return [int(j) for j in np.flatnonzero(self._matrix[i]) if j != i]

    def bonded_pairs(self) -> List[Tuple[int, int]]:
        """Unordered bonded pairs (i < j)."""
        rows, cols = np.nonzero(np.triu(self._matrix, k=1))
        return [(int(i), int(j)) for i, j in zip(rows, cols)]

    def size_compatible(self, n_atoms: int) -> bool:
        return self.n_atoms == n_atoms

    def copy(self) -> "BondTable":
        return BondTable(self.n_atoms, self._matrix.copy())

    def __eq__(self, other) -> bool:
        if not isinstance(other, BondTable):
            return NotImplemented
        return np.array_equal(self._matrix, other._matrix)

    def __repr__(self) -> str:
        return f"BondTable(n_atoms={self.n_atoms}, bonds={len(self.bonded_pairs())})"

    @classmethod
    def from_pairs(cls, n_atoms: int, pairs: Iterable[Tuple[int, int]]) -> "BondTable":
        table = cls(n_atoms)
        for i, j in pairs:
            table.set_bond(i, j)
        return table


def perceive_bonds(
    coords: np.ndarray,
    atomic_numbers: Sequence[int],
    blow_factor: float = 1.2,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> BondTable:
    """
    Build a BondTable from Cartesian coordinates.

    Two atoms are bonded when their distance does not exceed
    blow_factor * (r_i + r_j).

    Args:
        coords: (n, 3) coordinates in bohr
        atomic_numbers: Atomic number per atom
        blow_factor: Scaling of the covalent radius sum
        properties: Radius lookup table

    Returns:
        Perceived BondTable with the diagonal set
    """
    coords = np.asarray(coords, dtype=float)
    n = len(coords)
    if len(atomic_numbers) != n:
        raise ValueError(
            f"Got {len(atomic_numbers)} atomic numbers for {n} atoms"
        )
    if n == 0:
        return BondTable(0)

    radii = np.asarray(properties.radii(atomic_numbers))
    limits = blow_factor * (radii[:, None] + radii[None, :])
    distances = cdist(coords, coords)
    matrix = distances <= limits
    np.fill_diagonal(matrix, True)
    return BondTable(n, matrix)
