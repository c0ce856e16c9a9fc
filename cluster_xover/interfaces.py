"""
Interfaces for collaborators consumed by the crossover core.

Energy backends, clash scorers, optimizers and environments are supplied
by the caller. These protocols only describe the calls the core makes.
"""

from typing import Callable, List, Optional, Protocol, Sequence, Tuple, runtime_checkable

import numpy as np

from .bonds import BondTable


@runtime_checkable
class EnergyBackend(Protocol):
    """Black-box potential energy of a full coordinate set."""

    def evaluate(
        self,
        id: int,
        iteration: int,
        flat_coords: np.ndarray,
        labels: List[str],
        atomic_numbers: np.ndarray,
        fragment_sizes: List[int],
        fragment_energies: Optional[np.ndarray],
        n_atoms: int,
        charges: np.ndarray,
        spins: np.ndarray,
        bonds: BondTable,
    ) -> float:
        """
        Energy for coordinates laid out as all x, then all y, then all z.

        fragment_energies, when given, is filled with per-fragment energies.
        """
        ...


@runtime_checkable
class ClashStrengthScorer(Protocol):
    def score(self, i: int, j: int, blown_radius_sum: float, distance: float) -> float:
        ...


@runtime_checkable
class DerivativeFreeOptimizer(Protocol):
    """Bounded minimizer that only needs objective values."""

    def minimize(
        self,
        initial_point: np.ndarray,
        objective: Callable[[np.ndarray], float],
        bounds: Sequence[Tuple[float, float]],
    ) -> Tuple[float, np.ndarray]:
        """Return (best_value, best_point)."""
        ...


@runtime_checkable
class Environment(Protocol):
    """Rigid or flexible medium surrounding a cluster."""

    def clone(self) -> "Environment":
        ...

    def create_offspring(self, other: "Environment") -> Tuple["Environment", "Environment"]:
        ...

    def fits_around(self, structure) -> bool:
        ...
