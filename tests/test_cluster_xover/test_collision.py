"""
Tests for collision detection.

Tests the clash rule, bonded-pair exclusion, naive/grid agreement,
neighbor-cell enumeration, scorers and dissociation checks.
"""

import itertools
import unittest

import numpy as np

from cluster_xover.bonds import BondTable
from cluster_xover.collision import (
    DEFAULT_STRENGTH,
    FAR_DISTANCE,
    FORWARD_OFFSETS,
    ConstantStrengthScorer,
    GridCollisionEngine,
    NaivePairwiseEngine,
    OverlapStrengthScorer,
    count_fragments_apart,
    is_dissociated,
    make_collision_engine,
)
from cluster_xover.io_utils import structure_from_cartesian

from cluster_factories import atom_structure


ARGON = 18


class TestClashRule(unittest.TestCase):
    """Test the basic clash rule on both engines."""

    def setUp(self):
        # Ar radius 1.85 bohr, so the unblown radius sum is 3.7
        self.structure = atom_structure([[0.0, 0.0, 0.0], [3.0, 0.0, 0.0]], ["Ar", "Ar"])
        self.engines = [NaivePairwiseEngine(), GridCollisionEngine()]

    def test_close_atoms_clash(self):
        """Two non-bonded atoms inside the radius sum clash."""
        for engine in self.engines:
            self.assertTrue(engine.has_clash(self.structure, 1.0), type(engine).__name__)
            report = engine.detect(self.structure, 1.0)
            self.assertEqual(report.pairs(), {(0, 1)})
            self.assertAlmostEqual(report.distances[0, 1], 3.0)

    def test_bond_removes_clash(self):
        """Marking the pair as bonded flips the outcome."""
        self.structure.bonds.set_bond(0, 1)
        for engine in self.engines:
            self.assertFalse(engine.has_clash(self.structure, 1.0), type(engine).__name__)

    def test_explicit_bond_table(self):
        """A bond table passed explicitly overrides the structure's own."""
        bonds = BondTable.from_pairs(2, [(0, 1)])
        for engine in self.engines:
            self.assertFalse(engine.has_clash(self.structure, 1.0, bonds))
            self.assertTrue(engine.has_clash(self.structure, 1.0))

    def test_blow_factor(self):
        """Shrinking the blow factor below distance/radius sum removes the clash."""
        for engine in self.engines:
            self.assertFalse(engine.has_clash(self.structure, 0.8))
            self.assertTrue(engine.has_clash(self.structure, 0.82))

    def test_touching_counts_as_clash(self):
        """Distance equal to the blown radius sum is a clash."""
        structure = atom_structure([[0.0, 0.0, 0.0], [3.7, 0.0, 0.0]], ["Ar", "Ar"])
        for engine in self.engines:
            self.assertTrue(engine.has_clash(structure, 1.0))
            self.assertFalse(engine.has_clash(structure, 0.99))

    def test_bond_table_size_checked(self):
        """A bond table of the wrong size is rejected."""
        with self.assertRaises(ValueError):
            NaivePairwiseEngine().detect_coordinates(
                np.zeros((3, 3)), [ARGON] * 3, 1.0, BondTable(2)
            )


class TestEngineAgreement(unittest.TestCase):
    """Grid and naive engines must agree exactly."""

    def setUp(self):
        self.rng = np.random.default_rng(42)
        self.labels = ["H", "C", "O", "Ar"]

    def _random_structure(self):
        n = int(self.rng.integers(2, 201))
        box = 2.5 * n ** (1.0 / 3.0)
        coords = self.rng.uniform(0.0, box, size=(n, 3))
        labels = list(self.rng.choice(self.labels, size=n))
        structure = structure_from_cartesian(labels, coords, [1] * n, bond_blow=None)
        for _ in range(n // 5):
            i, j = self.rng.choice(n, size=2, replace=False)
            structure.bonds.set_bond(int(i), int(j))
        return structure

    def test_random_structures(self):
        """Identical clash sets, strengths and yes/no answers on 50 random structures."""
        total_clashes = 0
        for trial in range(50):
            structure = self._random_structure()
            blow = float(self.rng.uniform(0.8, 1.3))
            cell_size = 1.0 if trial % 2 == 0 else 7.0
            naive = NaivePairwiseEngine(scorer=OverlapStrengthScorer())
            grid = GridCollisionEngine(cell_size, scorer=OverlapStrengthScorer())

            naive_report = naive.detect(structure, blow)
            grid_report = grid.detect(structure, blow)

            self.assertEqual(grid_report.pairs(), naive_report.pairs(), f"trial {trial}")
            self.assertEqual(grid.has_clash(structure, blow), naive.has_clash(structure, blow))
            naive_strengths = {r.pair: r.strength for r in naive_report.clashes}
            for record in grid_report.clashes:
                self.assertAlmostEqual(record.strength, naive_strengths[record.pair])

            compared = grid_report.distances < FAR_DISTANCE
            np.testing.assert_allclose(
                grid_report.distances[compared], naive_report.distances[compared]
            )
            total_clashes += len(naive_report.clashes)

        self.assertGreater(total_clashes, 0)

    def test_first_clash_only(self):
        """First-clash-only mode stops after one clash."""
        structure = atom_structure([[0, 0, 0], [1, 0, 0], [2, 0, 0]], ["Ar"] * 3)
        for engine in (make_collision_engine('simplepairwise'),
                       make_collision_engine('simplegrid')):
            report = engine.detect(structure, 1.0)
            self.assertTrue(report.first_clash_only)
            self.assertEqual(len(report.clashes), 1)
        for engine in (make_collision_engine('advancedpairwise'),
                       make_collision_engine('advancedgrid')):
            self.assertEqual(engine.detect(structure, 1.0).pairs(), {(0, 1), (0, 2), (1, 2)})


class TestGridCells(unittest.TestCase):
    """Test grid neighbor enumeration."""

    def test_forward_offsets(self):
        """13 offsets which, with their mirrors and the cell itself, cover all 27."""
        self.assertEqual(len(FORWARD_OFFSETS), 13)
        mirrored = {tuple(-c for c in offset) for offset in FORWARD_OFFSETS}
        self.assertFalse(mirrored & set(FORWARD_OFFSETS))
        covered = set(FORWARD_OFFSETS) | mirrored | {(0, 0, 0)}
        self.assertEqual(covered, set(itertools.product((-1, 0, 1), repeat=3)))

    def test_clashes_across_cell_faces_and_diagonals(self):
        """Clashes between atoms in face, edge and body-diagonal neighbor cells are found."""
        coords = np.array([
            [0.0, 0.0, 0.0],
            [6.9, 0.0, 0.0],
            [7.2, 0.0, 0.0],
            [13.9, 13.9, 13.9],
            [14.1, 14.1, 14.1],
            [6.9, 7.1, 0.0],
            [7.1, 6.9, 0.0],
        ])
        engine = GridCollisionEngine(7.0)
        report = engine.detect_coordinates(coords, [ARGON] * 7, 1.0)
        self.assertEqual(report.pairs(), {(1, 2), (3, 4), (5, 6)})
        self.assertFalse(report.complete)

    def test_full_cross_product_within_cell(self):
        """Atoms that are not neighbors in the cell list are still compared."""
        coords = np.array([[0.0, 0.0, 0.0], [4.0, 4.0, 4.0], [0.5, 0.0, 0.0]])
        engine = GridCollisionEngine(7.0)
        report = engine.detect_coordinates(coords, [ARGON] * 3, 1.0)
        self.assertEqual(report.pairs(), {(0, 2)})
        self.assertTrue(report.complete)

    def test_cell_edge_covers_blown_radii(self):
        """A tiny cell size is widened to the largest blown radius sum."""
        coords = np.array([[0.0, 0.0, 0.0], [3.5, 0.0, 0.0]])
        engine = GridCollisionEngine(0.5)
        self.assertTrue(engine.detect_coordinates(coords, [ARGON, ARGON], 1.0).has_clash)

    def test_invalid_cell_size(self):
        with self.assertRaises(ValueError):
            GridCollisionEngine(0.0)

    def test_single_atom(self):
        """One atom never clashes."""
        report = GridCollisionEngine().detect_coordinates(np.zeros((1, 3)), [ARGON], 1.0)
        self.assertFalse(report.has_clash)


class TestScorersAndFactory(unittest.TestCase):
    """Test clash scorers and the engine factory."""

    def test_constant_scorer(self):
        """Constant scorer reports the default strength."""
        coords = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        report = NaivePairwiseEngine().detect_coordinates(coords, [ARGON, ARGON], 1.0)
        self.assertEqual(report.clashes[0].strength, DEFAULT_STRENGTH)
        self.assertEqual(ConstantStrengthScorer(5.0).score(0, 1, 3.0, 1.0), 5.0)

    def test_overlap_scorer(self):
        """Overlap scorer reports blown radius sum minus distance."""
        coords = np.array([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]])
        engine = NaivePairwiseEngine(scorer=OverlapStrengthScorer())
        report = engine.detect_coordinates(coords, [ARGON, ARGON], 1.0)
        self.assertAlmostEqual(report.clashes[0].strength, 2.7)
        self.assertAlmostEqual(report.total_strength(), 2.7)

    def test_factory(self):
        """Engines are created by name."""
        self.assertIsInstance(make_collision_engine('advancedgrid'), GridCollisionEngine)
        self.assertIsInstance(make_collision_engine('SimplePairwise'), NaivePairwiseEngine)
        self.assertEqual(make_collision_engine('simplegrid', cell_size=5.0).cell_size, 5.0)
        with self.assertRaises(ValueError):
            make_collision_engine('octree')


class TestDissociation(unittest.TestCase):
    """Test the connected-components dissociation check."""

    def test_far_apart(self):
        """Atoms beyond the blown radius sum form separate pieces."""
        coords = np.array([[0.0, 0.0, 0.0], [20.0, 0.0, 0.0]])
        self.assertTrue(is_dissociated(coords, [ARGON, ARGON], 3.0))
        self.assertEqual(count_fragments_apart(coords, [ARGON, ARGON], 3.0), 2)

    def test_chain_is_connected(self):
        """A chain of close atoms is one piece even if its ends are far apart."""
        coords = np.array([[10.0 * i, 0.0, 0.0] for i in range(5)])
        self.assertFalse(is_dissociated(coords, [ARGON] * 5, 3.0))


if __name__ == '__main__':
    unittest.main()
