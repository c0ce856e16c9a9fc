"""
Atomic property table for collision and bond checks.

Covalent radii are in bohr, weights in atomic mass units. The table is
read-only and passed explicitly to every consumer.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Tuple


RADIUS_DEFAULT = 5.0
WEIGHT_DEFAULT = 1.0

# symbol: (atomic number, covalent radius [bohr], weight [amu])
_ELEMENTS: Mapping[str, Tuple[int, float, float]] = {
    "XX": (0, 0.47, 0.0),
    "H": (1, 0.47, 1.00794),
    "He": (2, 0.53, 4.002602),
    "Li": (3, 2.42, 6.941),
    "Be": (4, 1.81, 9.012182),
    "B": (5, 1.59, 10.811),
    "C": (6, 1.32, 12.010),
    "N": (7, 1.23, 14.006),
    "O": (8, 1.13, 15.999),
    "F": (9, 1.08, 18.9984032),
    "Ne": (10, 1.10, 20.1797),
    "Na": (11, 3.15, 22.98977),
    "Mg": (12, 2.67, 24.3050),
    "Al": (13, 2.29, 26.981538),
    "Si": (14, 2.08, 28.0855),
    "P": (15, 2.02, 30.973761),
    "S": (16, 1.89, 32.065),
    "Cl": (17, 1.89, 35.453),
    "Ar": (18, 1.85, 39.948),
    "K": (19, 3.19, 39.0983),
    "Ca": (20, 3.29, 40.078),
    "Fe": (26, 2.68, 55.845),
    "Cu": (29, 2.55, 63.546),
    "Zn": (30, 2.31, 65.409),
    "Br": (35, 2.28, 79.904),
    "Kr": (36, 2.19, 83.798),
    "Ag": (47, 2.74, 107.8682),
    "I": (53, 2.63, 126.90447),
    "Xe": (54, 2.65, 131.293),
    "Au": (79, 2.57, 196.96655),
}


@dataclass(frozen=True)
class AtomicProperties:
    """
    Lookup table mapping atom labels and atomic numbers to radii and weights.

    Attributes:
        elements: Mapping of label -> (atomic number, radius, weight)
        default_radius: Radius returned for unknown atoms
        default_weight: Weight returned for unknown atoms
    """
    elements: Mapping[str, Tuple[int, float, float]] = field(
        default_factory=lambda: MappingProxyType(dict(_ELEMENTS))
    )
    default_radius: float = RADIUS_DEFAULT
    default_weight: float = WEIGHT_DEFAULT

    def __post_init__(self):
        by_number = {}
        for label, (number, radius, weight) in self.elements.items():
            by_number.setdefault(number, (label, radius, weight))
        object.__setattr__(self, "_by_number", MappingProxyType(by_number))

    def atomic_number(self, label: str) -> int:
        """Atomic number for a label, -1 if the label is unknown."""
        entry = self.elements.get(label)
        return entry[0] if entry is not None else -1

    def radius(self, atomic_number: int) -> float:
        entry = self._by_number.get(int(atomic_number))
        return entry[1] if entry is not None else self.default_radius

    def radius_of(self, label: str) -> float:
        entry = self.elements.get(label)
        return entry[1] if entry is not None else self.default_radius

    def weight(self, atomic_number: int) -> float:
        entry = self._by_number.get(int(atomic_number))
        return entry[2] if entry is not None else self.default_weight

    def radii(self, atomic_numbers) -> list:
        """Radii for a sequence of atomic numbers."""
        return [self.radius(n) for n in atomic_numbers]

    def weights(self, atomic_numbers) -> list:
        return [self.weight(n) for n in atomic_numbers]


DEFAULT_PROPERTIES = AtomicProperties()
