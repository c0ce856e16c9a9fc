"""
Stoichiometry repair for spatial crossover.

Before two parents can exchange the fragments above their cuts, the mother's
exchange side must hold exactly as many fragments of every species as the
father's. Repair achieves this by swapping the poses (COM and orientation)
of mother fragments across her cut; fragment identities never move.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Sequence

import numpy as np

from .data_models import InvariantViolation, Structure, swap_poses

logger = logging.getLogger(__name__)


@dataclass
class RepairOutcome:
    """
    Result of a repair pass.

    Attributes:
        keep: Mother fragment positions on the keep side, ascending
        exchange: Mother fragment positions on the exchange side, ascending
        swaps: Number of pose swaps performed
        discrepancies: Per-species father-minus-mother exchange counts before repair
        notes: Human-readable operation notes
    """
    keep: List[int]
    exchange: List[int]
    swaps: int = 0
    discrepancies: Dict[str, int] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)


def species_discrepancies(father_exchange: Mapping[str, int],
                          mother_exchange: Mapping[str, int]) -> Dict[str, int]:
    """Father-minus-mother fragment count per species on the exchange side."""
    species = sorted(set(father_exchange) | set(mother_exchange))
    return {s: father_exchange.get(s, 0) - mother_exchange.get(s, 0) for s in species}


def _pop_random(positions: List[int], rng: np.random.Generator) -> int:
    """Remove and return a uniformly chosen element (order is not kept)."""
    index = int(rng.integers(0, len(positions)))
    positions[index], positions[-1] = positions[-1], positions[index]
    return positions.pop()


def _group_by_species(structure: Structure, positions: Sequence[int]) -> Dict[str, List[int]]:
    groups: Dict[str, List[int]] = {}
    for position in positions:
        groups.setdefault(structure.fragments[position].species_id, []).append(position)
    return groups


def repair_stoichiometry(
    mother: Structure,
    keep: Sequence[int],
    exchange: Sequence[int],
    father_exchange_counts: Mapping[str, int],
    rng: np.random.Generator
) -> RepairOutcome:
    """
    Make the mother's exchange side match the father's species counts.

    Algorithm:
    1. Compute d_s = father_exchange_s - mother_exchange_s per species
    2. While some d_s > 0: pick a random mother keep-side fragment of
       species s, a random species t with d_t < 0 and a random mother
       exchange-side fragment of species t, then swap their poses
    3. Move both positions to their new sides and update d_s, d_t

    Every swap lowers the total positive discrepancy by one, so the loop
    ends after at most len(mother.fragments) swaps.

    Args:
        mother: Mother structure, modified in place
        keep: Mother fragment positions at or below her cut
        exchange: Mother fragment positions above her cut
        father_exchange_counts: Species counts on the father's exchange side
        rng: Random number generator

    Returns:
        RepairOutcome with the updated side lists and notes

    Raises:
        InvariantViolation: If the sides cannot be balanced (the parents do
            not share a species multiset or the side sizes differ)
    """
    mother_counts = Counter(mother.fragments[i].species_id for i in exchange)
    discrepancies = species_discrepancies(father_exchange_counts, mother_counts)
    if sum(discrepancies.values()) != 0:
        raise InvariantViolation(
            f"Exchange sides differ in size: father {sum(father_exchange_counts.values())}, "
            f"mother {len(exchange)}"
        )

    outcome = RepairOutcome(keep=sorted(keep), exchange=sorted(exchange),
                            discrepancies=dict(discrepancies))
    if not any(discrepancies.values()):
        outcome.notes.append("repair_stoichiometry: exchange sides already balanced")
        return outcome

    keep_by_species = _group_by_species(mother, keep)
    exchange_by_species = _group_by_species(mother, exchange)
    remaining = dict(discrepancies)
    swaps = 0

    for species in sorted(remaining):
        while remaining[species] > 0:
            candidates = keep_by_species.get(species, [])
            deficient = [t for t in sorted(remaining) if remaining[t] < 0]
            if not candidates or not deficient:
                raise InvariantViolation(
                    f"Cannot balance species {species!r}: no mother fragment left to swap"
                )
            partner_species = deficient[int(rng.integers(0, len(deficient)))]

            inside = _pop_random(candidates, rng)
            outside = _pop_random(exchange_by_species[partner_species], rng)
            swap_poses(mother.fragments[inside], mother.fragments[outside])

            exchange_by_species.setdefault(species, []).append(inside)
            keep_by_species.setdefault(partner_species, []).append(outside)
            remaining[species] -= 1
            remaining[partner_species] += 1
            swaps += 1
            logger.debug(
                f"Repair swap {swaps}: fragment {inside} ({species}) <-> "
                f"fragment {outside} ({partner_species})"
            )

    outcome.keep = sorted(p for positions in keep_by_species.values() for p in positions)
    outcome.exchange = sorted(p for positions in exchange_by_species.values() for p in positions)
    outcome.swaps = swaps
    moved = {s: d for s, d in discrepancies.items() if d}
    outcome.notes.append(
        f"repair_stoichiometry: {swaps} pose swaps to balance {moved}"
    )
    return outcome
