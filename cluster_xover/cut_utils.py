"""
Cut primitives for spatial crossover.

A cut primitive maps every fragment to a scalar cut coordinate (height along
an axis, or distance from the origin), draws random cut values, and knows
how to carry a fragment across from one parent's cut to the other's.
Fragments with a cut coordinate above the cut value form the exchange side.
"""

import logging
from collections import Counter
from typing import List, Optional, Sequence, Tuple

import numpy as np
from scipy.stats import truncnorm

from .data_models import Fragment, Structure

logger = logging.getLogger(__name__)


AXES = {'x': 0, 'y': 1, 'z': 2}
DEFAULT_TOLERANCE = 1e-8


def truncated_gauss(rng: np.random.Generator, width: float, lower: float, upper: float) -> float:
    """Gaussian draw with standard deviation width, truncated to [lower, upper]."""
    return float(truncnorm.rvs(lower / width, upper / width, loc=0.0, scale=width,
                               random_state=rng))


class CutPrimitive:
    """Base class for plane and sphere cuts."""

    name = "cut"
    modes: Tuple[str, ...] = ()

    def __init__(self, mode: str = 'uniform', gauss_width: float = 0.3):
        if mode not in self.modes:
            raise ValueError(
                f"Cut mode '{mode}' is not valid for {self.name} cuts. Choose from {self.modes}"
            )
        if gauss_width <= 0.0:
            raise ValueError(f"Gauss width must be positive, got {gauss_width}")
        self.mode = mode
        self.gauss_width = gauss_width

    def coordinates(self, structure: Structure) -> np.ndarray:
        """Cut coordinate of every fragment, indexed by fragment position."""
        raise NotImplementedError

    def draw(self, values: np.ndarray, rng: np.random.Generator) -> float:
        """One random cut value for the given fragment cut coordinates."""
        raise NotImplementedError

    def accepts(self, value: float) -> bool:
        return True

    def carry_over(self, fragment: Fragment, from_cut: float, to_cut: float):
        """Move a fragment cut at from_cut so it sits relative to to_cut."""
        raise NotImplementedError

    def describe(self) -> str:
        return f"{self.name}({self.mode})"


class PlaneCut(CutPrimitive):
    """Axis-aligned plane at a height along x, y or z."""

    name = "plane"
    modes = ('uniform', 'gauss', 'zero')

    def __init__(self, axis: str = 'z', mode: str = 'uniform', gauss_width: float = 0.3):
        super().__init__(mode, gauss_width)
        if axis not in AXES:
            raise ValueError(f"Invalid plane axis: {axis}. Must be one of {sorted(AXES)}")
        self.axis = axis
        self.axis_index = AXES[axis]

    def coordinates(self, structure: Structure) -> np.ndarray:
        return structure.coms()[:, self.axis_index].copy()

    def draw(self, values: np.ndarray, rng: np.random.Generator) -> float:
        low, high = float(values.min()), float(values.max())
        if self.mode == 'uniform':
            return rng.random() * (high - low) + low
        if self.mode == 'gauss':
            g = truncated_gauss(rng, self.gauss_width, -1.0, 1.0)
            return g * high if g >= 0.0 else -g * low
        return 0.0

    def carry_over(self, fragment: Fragment, from_cut: float, to_cut: float):
        com = fragment.com.copy()
        com[self.axis_index] += to_cut - from_cut
        fragment.com = com

    def describe(self) -> str:
        return f"plane-{self.axis}({self.mode})"


class SphereCut(CutPrimitive):
    """Sphere centered at the origin; the outer shell is exchanged."""

    name = "sphere"
    modes = ('uniform', 'gauss', 'inverted_gauss')

    def coordinates(self, structure: Structure) -> np.ndarray:
        return np.linalg.norm(structure.coms(), axis=1)

    def draw(self, values: np.ndarray, rng: np.random.Generator) -> float:
        radius = float(values.max())
        if self.mode == 'uniform':
            return radius * rng.random()
        half = truncated_gauss(rng, self.gauss_width, 0.0, 1.0)
        if self.mode == 'gauss':
            return radius * abs(half)
        return radius * (1.0 - half)

    def accepts(self, value: float) -> bool:
        return value > 0.0

    def carry_over(self, fragment: Fragment, from_cut: float, to_cut: float):
        fragment.com = fragment.com * (to_cut / from_cut)


def make_cut_primitive(strategy: str, axis: str = 'z', mode: str = 'uniform',
                       gauss_width: float = 0.3) -> CutPrimitive:
    if strategy == 'plane':
        return PlaneCut(axis, mode, gauss_width)
    if strategy == 'sphere':
        return SphereCut(mode, gauss_width)
    raise ValueError(f"Unknown crossover strategy: {strategy}. Must be 'plane' or 'sphere'")


def exchange_count(values: np.ndarray, cut: float) -> int:
    return int(np.count_nonzero(values > cut))


def draw_valid_cut(
    cut: CutPrimitive,
    values: np.ndarray,
    rng: np.random.Generator,
    max_attempts: int
) -> Optional[float]:
    """
    Draw cut values until both sides hold at least one fragment.

    Returns:
        Cut value, or None if max_attempts draws all left one side empty
    """
    n = len(values)
    for attempt in range(max_attempts):
        value = cut.draw(values, rng)
        above = exchange_count(values, value)
        if 0 < above < n and cut.accepts(value):
            logger.debug(f"{cut.describe()} cut {value:.4f} after {attempt + 1} draws")
            return value
    logger.info(f"No valid {cut.describe()} cut within {max_attempts} draws")
    return None


def find_order_statistic_cut(
    values: Sequence[float],
    k: int,
    tolerance: float = DEFAULT_TOLERANCE
) -> Optional[float]:
    """
    Cut value leaving exactly k values at or below it.

    The threshold is placed halfway between the k-th and (k+1)-th smallest
    values.

    Args:
        values: Per-fragment cut coordinates
        k: Number of fragments wanted on the keep side, 0 < k < len(values)
        tolerance: Minimum gap between the two surrounding order statistics

    Returns:
        Cut value, or None if the two order statistics are indistinguishable

    Raises:
        ValueError: If k leaves one side empty
    """
    ordered = np.sort(np.asarray(values, dtype=float))
    if not 0 < k < len(ordered):
        raise ValueError(f"Order statistic k={k} out of range for {len(ordered)} values")
    below, above = ordered[k - 1], ordered[k]
    if above - below < tolerance:
        logger.info(
            f"Degenerate order statistic: values {below:.10f} and {above:.10f} coincide"
        )
        return None
    return 0.5 * (below + above)


def partition(values: np.ndarray, cut: float) -> Tuple[List[int], List[int]]:
    """
    Split fragment positions by a cut value.

    Returns:
        Tuple of (keep_indices, exchange_indices), both ascending
    """
    exchange_mask = values > cut
    keep = [int(i) for i in np.flatnonzero(~exchange_mask)]
    exchange = [int(i) for i in np.flatnonzero(exchange_mask)]
    return keep, exchange


def species_counts(structure: Structure, indices: Sequence[int]) -> Counter:
    """Per-species fragment counts over a set of fragment positions."""
    return Counter(structure.fragments[i].species_id for i in indices)
