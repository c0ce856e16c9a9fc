"""
Data models for cluster crossover.

Core data structures representing molecular fragments, candidate cluster
structures and their internal coordinates.
"""

import copy
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from .bonds import BondTable
from .geometry import (
    align_onto,
    cartesian_to_zmatrix,
    center_of_mass,
    eulers_from_matrix,
    rotation_matrix,
    sanitize_eulers,
    zmatrix_to_cartesian,
)
from .interfaces import Environment
from .properties import AtomicProperties, DEFAULT_PROPERTIES


FITNESS_UNEVALUATED = float("inf")
NO_PARENT = -1


class InvariantViolation(RuntimeError):
    """Raised when an internal consistency invariant is broken (a logic bug)."""
    pass


@dataclass
class InternalCoordinates:
    """
    Z-matrix representation of a flexible fragment.

    Attributes:
        connectivity: (n, 3) int array of bond/angle/dihedral reference atoms,
            -1 where undefined
        values: (n, 3) float array of bond length [bohr], angle and dihedral [rad]
    """
    connectivity: np.ndarray
    values: np.ndarray

    def __post_init__(self):
        self.connectivity = np.asarray(self.connectivity, dtype=int)
        self.values = np.asarray(self.values, dtype=float)
        if self.connectivity.shape != self.values.shape or self.values.ndim != 2 \
                or self.values.shape[1] != 3:
            raise ValueError(
                f"Internal coordinate shapes do not match: "
                f"{self.connectivity.shape} vs {self.values.shape}"
            )

    @property
    def n_atoms(self) -> int:
        return len(self.values)

    def to_cartesian(self) -> np.ndarray:
        return zmatrix_to_cartesian(self.connectivity, self.values)

    def copy(self) -> "InternalCoordinates":
        return InternalCoordinates(self.connectivity.copy(), self.values.copy())

    @classmethod
    def from_cartesian(cls, coords: np.ndarray) -> "InternalCoordinates":
        connectivity, values = cartesian_to_zmatrix(coords)
        return cls(connectivity, values)


class Fragment:
    """
    A rigid (or partially flexible) group of atoms moved as one unit.

    The pose is given by a center of mass and yaw-pitch-roll Euler angles;
    the body frame is held in COM-centered reference coordinates. Every
    orientation assignment is wrapped into the valid Euler ranges.

    Attributes:
        id: Fragment index inside its owning Structure
        species_id: Species identifier used for stoichiometry accounting
        labels: Per-atom element labels
        atomic_numbers: Per-atom atomic numbers
        reference_coords: (n, 3) body-frame coordinates
        charges: Per-atom partial charges
        spins: Per-atom spins
        energy: Last known fragment energy
        internal: Internal coordinates (flexible fragments only)
        dof_mask: (3, n) mask of mutable internal coordinates (flexible only)
        constraint_mask: (n, 3) per-atom, per-axis constraint mask
    """

    def __init__(
        self,
        id: int,
        species_id: str,
        labels: Sequence[str],
        atomic_numbers: Sequence[int],
        reference_coords: np.ndarray,
        com: Sequence[float] = (0.0, 0.0, 0.0),
        orientation: Sequence[float] = (0.0, 0.0, 0.0),
        charges: Optional[Sequence[float]] = None,
        spins: Optional[Sequence[int]] = None,
        energy: float = 0.0,
        internal: Optional[InternalCoordinates] = None,
        dof_mask: Optional[np.ndarray] = None,
        constraint_mask: Optional[np.ndarray] = None,
    ):
        self.id = int(id)
        self.species_id = str(species_id)
        self.labels = list(labels)
        self.atomic_numbers = np.asarray(atomic_numbers, dtype=int)
        self.reference_coords = np.asarray(reference_coords, dtype=float).reshape(-1, 3)
        n = len(self.labels)
        if len(self.atomic_numbers) != n or len(self.reference_coords) != n:
            raise ValueError(
                f"Fragment {id}: {n} labels, {len(self.atomic_numbers)} atomic numbers, "
                f"{len(self.reference_coords)} coordinates"
            )
        self.charges = np.zeros(n) if charges is None else np.asarray(charges, dtype=float)
        self.spins = np.zeros(n, dtype=int) if spins is None else np.asarray(spins, dtype=int)
        self.energy = float(energy)
        self.com = com
        self.orientation = orientation

        if internal is not None and internal.n_atoms != n:
            raise ValueError(f"Fragment {id}: internal coordinates cover {internal.n_atoms} atoms")
        self.internal = internal
        if internal is not None and dof_mask is None:
            dof_mask = (internal.connectivity >= 0).T
        self.dof_mask = None if dof_mask is None else np.asarray(dof_mask, dtype=bool)
        if self.dof_mask is not None and self.dof_mask.shape != (3, n):
            raise ValueError(f"Fragment {id}: DoF mask must have shape (3, {n})")
        self.constraint_mask = (
            None if constraint_mask is None else np.asarray(constraint_mask, dtype=bool)
        )
        if self.constraint_mask is not None and self.constraint_mask.shape != (n, 3):
            raise ValueError(f"Fragment {id}: constraint mask must have shape ({n}, 3)")

    @property
    def com(self) -> np.ndarray:
        return self._com

    @com.setter
    def com(self, value):
        value = np.array(value, dtype=float)
        if value.shape != (3,):
            raise ValueError(f"COM must have three components, got shape {value.shape}")
        self._com = value

    @property
    def orientation(self) -> np.ndarray:
        return self._orientation

    @orientation.setter
    def orientation(self, value):
        self._orientation = sanitize_eulers(value)

    @property
    def n_atoms(self) -> int:
        return len(self.labels)

    @property
    def flexible(self) -> bool:
        return self.internal is not None

    @property
    def constrained(self) -> bool:
        return self.constraint_mask is not None

    def total_weight(self, properties: AtomicProperties = DEFAULT_PROPERTIES) -> float:
        return float(sum(properties.weights(self.atomic_numbers)))

    def body_coords(self, properties: AtomicProperties = DEFAULT_PROPERTIES) -> np.ndarray:
        """
        COM-centered body-frame coordinates.

        Flexible fragments rebuild their body from the internal coordinates,
        then align it onto the reference frame so that the external
        orientation keeps its meaning.
        """
        if not self.flexible or self.n_atoms < 2:
            return self.reference_coords.copy()

        weights = properties.weights(self.atomic_numbers)
        body = self.internal.to_cartesian()
        body = body - center_of_mass(body, weights)
        return align_onto(body, self.reference_coords, weights)

    def cartesian(self, properties: AtomicProperties = DEFAULT_PROPERTIES) -> np.ndarray:
        """Lab-frame (n, 3) coordinates."""
        return self.body_coords(properties) @ rotation_matrix(self._orientation).T + self._com

    def rotate_about_origin(self, matrix: np.ndarray):
        """Apply a rigid rotation about the lab origin to the pose."""
        self._com = matrix @ self._com
        self._orientation = eulers_from_matrix(matrix @ rotation_matrix(self._orientation))

    def same_layout(self, other: "Fragment") -> bool:
        """True if both fragments describe the same species and atoms."""
        return (
            self.species_id == other.species_id
            and self.labels == other.labels
            and np.array_equal(self.atomic_numbers, other.atomic_numbers)
        )

    def copy(self) -> "Fragment":
        return Fragment(
            id=self.id,
            species_id=self.species_id,
            labels=list(self.labels),
            atomic_numbers=self.atomic_numbers.copy(),
            reference_coords=self.reference_coords.copy(),
            com=self._com.copy(),
            orientation=self._orientation.copy(),
            charges=self.charges.copy(),
            spins=self.spins.copy(),
            energy=self.energy,
            internal=None if self.internal is None else self.internal.copy(),
            dof_mask=None if self.dof_mask is None else self.dof_mask.copy(),
            constraint_mask=None if self.constraint_mask is None else self.constraint_mask.copy(),
        )

    def __repr__(self) -> str:
        return (
            f"Fragment(id={self.id}, species={self.species_id!r}, n_atoms={self.n_atoms}, "
            f"com={np.round(self._com, 4).tolist()})"
        )

    @classmethod
    def from_cartesian(
        cls,
        id: int,
        species_id: str,
        labels: Sequence[str],
        coords: np.ndarray,
        properties: AtomicProperties = DEFAULT_PROPERTIES,
        flexible: bool = False,
        **kwargs
    ) -> "Fragment":
        """
        Build a fragment from a block of lab-frame coordinates.

        The COM becomes the external position, the centered coordinates the
        reference frame, and the orientation starts at zero. A single atom
        keeps its position exactly and an all-zero reference frame.
        """
        coords = np.asarray(coords, dtype=float).reshape(-1, 3)
        atomic_numbers = [properties.atomic_number(label) for label in labels]
        if len(coords) == 1:
            com = coords[0].copy()
            reference = np.zeros((1, 3))
        else:
            com = center_of_mass(coords, properties.weights(atomic_numbers))
            reference = coords - com
        internal = InternalCoordinates.from_cartesian(reference) if flexible else None
        return cls(
            id=id,
            species_id=species_id,
            labels=labels,
            atomic_numbers=atomic_numbers,
            reference_coords=reference,
            com=com,
            internal=internal,
            **kwargs
        )


def swap_poses(a: Fragment, b: Fragment):
    """Exchange COM and orientation of two fragments; identities stay put."""
    a_com, a_orientation = a.com, a.orientation
    a.com, a.orientation = b.com, b.orientation
    b.com, b.orientation = a_com, a_orientation


@dataclass
class Structure:
    """
    A candidate cluster: an ordered list of fragments plus metadata.

    Fragment position in the list is its identity. The bond table always
    covers every atom of the structure.

    Attributes:
        fragments: Ordered fragments
        bonds: Covalent bond table over global atom indices
        id: Structure identifier
        father_id: Lineage, NO_PARENT if none
        mother_id: Lineage, NO_PARENT if none
        fitness: Fitness, FITNESS_UNEVALUATED until scored
        environment: Optional surrounding medium
        metadata: Additional information (crossover notes, statistics)
    """
    fragments: List[Fragment]
    bonds: Optional[BondTable] = None
    id: int = 0
    father_id: int = NO_PARENT
    mother_id: int = NO_PARENT
    fitness: float = FITNESS_UNEVALUATED
    environment: Optional[Environment] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.bonds is None:
            self.bonds = BondTable(self.n_atoms)
        self.check_bonds()

    def check_bonds(self):
        """Raise InvariantViolation if the bond table does not cover all atoms."""
        if not self.bonds.size_compatible(self.n_atoms):
            raise InvariantViolation(
                f"Structure {self.id}: bond table covers {self.bonds.n_atoms} atoms, "
                f"structure has {self.n_atoms}"
            )

    @property
    def n_fragments(self) -> int:
        return len(self.fragments)

    @property
    def n_atoms(self) -> int:
        return sum(fragment.n_atoms for fragment in self.fragments)

    def species_ids(self) -> List[str]:
        return [fragment.species_id for fragment in self.fragments]

    def species_counts(self) -> Counter:
        return Counter(self.species_ids())

    def fragment_sizes(self) -> List[int]:
        return [fragment.n_atoms for fragment in self.fragments]

    def atom_offsets(self) -> List[int]:
        """Global index of the first atom of every fragment."""
        offsets = np.concatenate([[0], np.cumsum(self.fragment_sizes())])
        return [int(o) for o in offsets[:-1]]

    def labels(self) -> List[str]:
        return [label for fragment in self.fragments for label in fragment.labels]

    def atomic_numbers(self) -> np.ndarray:
        if not self.fragments:
            return np.zeros(0, dtype=int)
        return np.concatenate([fragment.atomic_numbers for fragment in self.fragments])

    def charges(self) -> np.ndarray:
        if not self.fragments:
            return np.zeros(0)
        return np.concatenate([fragment.charges for fragment in self.fragments])

    def spins(self) -> np.ndarray:
        if not self.fragments:
            return np.zeros(0, dtype=int)
        return np.concatenate([fragment.spins for fragment in self.fragments])

    def cartesian(self, properties: AtomicProperties = DEFAULT_PROPERTIES) -> np.ndarray:
        """All atomic coordinates as an (n_atoms, 3) array."""
        if not self.fragments:
            return np.zeros((0, 3))
        return np.vstack([fragment.cartesian(properties) for fragment in self.fragments])

    def flat_coordinates(self, properties: AtomicProperties = DEFAULT_PROPERTIES) -> np.ndarray:
        """Coordinates laid out as all x, then all y, then all z."""
        return self.cartesian(properties).T.ravel()

    def coms(self) -> np.ndarray:
        return np.array([fragment.com for fragment in self.fragments]).reshape(-1, 3)

    def center_of_mass(self, properties: AtomicProperties = DEFAULT_PROPERTIES) -> np.ndarray:
        weights = [fragment.total_weight(properties) for fragment in self.fragments]
        return center_of_mass(self.coms(), weights)

    def move_to_com(self, properties: AtomicProperties = DEFAULT_PROPERTIES):
        """Translate the structure so its center of mass sits at the origin."""
        com = self.center_of_mass(properties)
        for fragment in self.fragments:
            fragment.com = fragment.com - com

    def rotate_about_origin(self, matrix: np.ndarray):
        for fragment in self.fragments:
            fragment.rotate_about_origin(matrix)

    def reassign_fragment_ids(self):
        for index, fragment in enumerate(self.fragments):
            fragment.id = index

    def copy(self) -> "Structure":
        """
        Create a deep copy of this structure.

        Returns:
            New Structure with copied fragments, bonds, environment and metadata
        """
        return Structure(
            fragments=[fragment.copy() for fragment in self.fragments],
            bonds=self.bonds.copy(),
            id=self.id,
            father_id=self.father_id,
            mother_id=self.mother_id,
            fitness=self.fitness,
            environment=None if self.environment is None else self.environment.clone(),
            metadata=copy.deepcopy(self.metadata),
        )
