"""
Tests for geometry helpers, bond tables and the fragment/structure model.

Tests Euler angle sanitization, rotations, Z-matrix conversion, bond
perception, fragment poses and structure bookkeeping.
"""

import math
import unittest

import numpy as np

from cluster_xover.bonds import BondTable, perceive_bonds
from cluster_xover.data_models import (
    FITNESS_UNEVALUATED,
    Fragment,
    InternalCoordinates,
    InvariantViolation,
    Structure,
    swap_poses,
)
from cluster_xover.geometry import (
    align_onto,
    cartesian_to_zmatrix,
    eulers_from_matrix,
    random_rotation_matrix,
    rotation_matrix,
    sanitize_eulers,
    sanitize_omega,
    sanitize_phi,
    zmatrix_to_cartesian,
)
from cluster_xover.properties import DEFAULT_PROPERTIES, AtomicProperties, RADIUS_DEFAULT

from cluster_factories import WATER_COORDS, WATER_LABELS, atom_structure, water_cluster


def _rx(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[1, 0, 0], [0, c, -s], [0, s, c]])


def _ry(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, 0, s], [0, 1, 0], [-s, 0, c]])


def _rz(a):
    c, s = math.cos(a), math.sin(a)
    return np.array([[c, -s, 0], [s, c, 0], [0, 0, 1]])


class TestEulerSanitization(unittest.TestCase):
    """Test wrapping of Euler angles into their valid ranges."""

    def setUp(self):
        self.rng = np.random.default_rng(42)
        special = [0.0, math.pi, -math.pi, 0.5 * math.pi, -0.5 * math.pi,
                   2 * math.pi, -2 * math.pi, 7.0, -7.0, 100.0, 1e-17]
        self.values = special + list(self.rng.uniform(-50.0, 50.0, size=200))

    def test_ranges(self):
        """Sanitized angles always lie in their documented ranges."""
        for value in self.values:
            phi, omega, psi = sanitize_eulers([value, value, value])
            self.assertTrue(-math.pi < phi <= math.pi, value)
            self.assertTrue(-0.5 * math.pi < omega <= 0.5 * math.pi, value)
            self.assertTrue(-math.pi < psi <= math.pi, value)

    def test_idempotence(self):
        """Sanitizing twice gives the same angles as sanitizing once."""
        for value in self.values:
            once = sanitize_eulers([value, value, value])
            twice = sanitize_eulers(once)
            np.testing.assert_allclose(twice, once, atol=1e-12)

    def test_boundaries(self):
        """Upper bounds are kept, lower bounds map onto upper bounds."""
        self.assertAlmostEqual(sanitize_phi(math.pi), math.pi)
        self.assertAlmostEqual(sanitize_phi(-math.pi), math.pi)
        self.assertAlmostEqual(sanitize_omega(-0.5 * math.pi), 0.5 * math.pi)
        self.assertAlmostEqual(sanitize_phi(0.25), 0.25)

    def test_full_turn_is_same_rotation(self):
        """Wrapping phi and psi by full turns does not change the rotation."""
        eulers = [0.3 + 4 * math.pi, 0.2, -0.7 - 2 * math.pi]
        np.testing.assert_allclose(
            rotation_matrix(sanitize_eulers(eulers)), rotation_matrix(eulers), atol=1e-12
        )

    def test_wrong_length(self):
        """Anything but three angles is rejected."""
        with self.assertRaises(ValueError):
            sanitize_eulers([0.0, 0.0])


class TestRotations(unittest.TestCase):
    """Test yaw-pitch-roll rotation matrices."""

    def setUp(self):
        self.rng = np.random.default_rng(42)

    def test_matrix_convention(self):
        """R equals Rz(psi) Ry(omega) Rx(phi)."""
        phi, omega, psi = 0.4, -0.9, 2.1
        expected = _rz(psi) @ _ry(omega) @ _rx(phi)
        np.testing.assert_allclose(rotation_matrix([phi, omega, psi]), expected, atol=1e-12)

    def test_matrix_to_eulers_round_trip(self):
        """Angles inside the ranges are recovered from their matrix."""
        for _ in range(20):
            eulers = np.array([
                self.rng.uniform(-3.0, 3.0),
                self.rng.uniform(-1.4, 1.4),
                self.rng.uniform(-3.0, 3.0),
            ])
            recovered = eulers_from_matrix(rotation_matrix(eulers))
            np.testing.assert_allclose(recovered, eulers, atol=1e-9)

    def test_random_rotation_is_proper(self):
        """Random rotations are orthogonal with determinant one."""
        matrix = random_rotation_matrix(self.rng)
        np.testing.assert_allclose(matrix @ matrix.T, np.eye(3), atol=1e-12)
        self.assertAlmostEqual(np.linalg.det(matrix), 1.0)

    def test_random_rotation_is_reproducible(self):
        """The same seed yields the same rotation."""
        a = random_rotation_matrix(np.random.default_rng(7))
        b = random_rotation_matrix(np.random.default_rng(7))
        np.testing.assert_array_equal(a, b)


class TestZMatrix(unittest.TestCase):
    """Test Z-matrix conversion and alignment."""

    def setUp(self):
        self.rng = np.random.default_rng(42)
        self.coords = self.rng.normal(scale=2.0, size=(6, 3))

    def test_distances_preserved(self):
        """Rebuilt coordinates have the original interatomic distances."""
        connectivity, values = cartesian_to_zmatrix(self.coords)
        rebuilt = zmatrix_to_cartesian(connectivity, values)

        def distances(x):
            return np.linalg.norm(x[:, None, :] - x[None, :, :], axis=-1)

        np.testing.assert_allclose(distances(rebuilt), distances(self.coords), atol=1e-8)

    def test_rebuilt_aligns_onto_original(self):
        """Rebuilt coordinates are a proper rotation of the original (same handedness)."""
        connectivity, values = cartesian_to_zmatrix(self.coords)
        rebuilt = zmatrix_to_cartesian(connectivity, values)
        reference = self.coords - self.coords.mean(axis=0)
        aligned = align_onto(rebuilt - rebuilt.mean(axis=0), reference)
        np.testing.assert_allclose(aligned, reference, atol=1e-6)

    def test_connectivity_layout(self):
        """Chain Z-matrix references the previous three atoms."""
        connectivity, _ = cartesian_to_zmatrix(self.coords)
        np.testing.assert_array_equal(connectivity[0], [-1, -1, -1])
        np.testing.assert_array_equal(connectivity[1], [0, -1, -1])
        np.testing.assert_array_equal(connectivity[2], [1, 0, -1])
        np.testing.assert_array_equal(connectivity[5], [4, 3, 2])


class TestProperties(unittest.TestCase):
    """Test the atomic property table."""

    def test_known_and_unknown(self):
        """Known atoms resolve, unknown atoms fall back to defaults."""
        props = DEFAULT_PROPERTIES
        self.assertEqual(props.atomic_number("O"), 8)
        self.assertAlmostEqual(props.radius(8), 1.13)
        self.assertEqual(props.atomic_number("Unobtainium"), -1)
        self.assertEqual(props.radius(-1), RADIUS_DEFAULT)
        self.assertEqual(props.radius_of("Unobtainium"), RADIUS_DEFAULT)

    def test_custom_table(self):
        """A custom table can be injected."""
        props = AtomicProperties(elements={"A": (1, 2.0, 3.0)}, default_radius=9.0)
        self.assertEqual(props.radius(1), 2.0)
        self.assertEqual(props.weight(1), 3.0)
        self.assertEqual(props.radius(2), 9.0)


class TestBondTable(unittest.TestCase):
    """Test bond tables and bond perception."""

    def test_symmetry(self):
        """Setting a bond sets both directions."""
        table = BondTable(4)
        table.set_bond(0, 3)
        self.assertTrue(table.has_bond(3, 0))
        self.assertEqual(table.bonded_pairs(), [(0, 3)])
        table.set_bond(3, 0, False)
        self.assertFalse(table.has_bond(0, 3))

    def test_copy_is_independent(self):
        """Copies do not share storage."""
        table = BondTable.from_pairs(3, [(0, 1)])
        copy = table.copy()
        copy.set_bond(1, 2)
        self.assertFalse(table.has_bond(1, 2))
        self.assertEqual(table, BondTable.from_pairs(3, [(0, 1)]))

    def test_shape_mismatch(self):
        """A matrix of the wrong size is rejected."""
        with self.assertRaises(ValueError):
            BondTable(3, np.zeros((2, 2), dtype=bool))

    def test_perceive_water(self):
        """O-H bonds are perceived, H-H is not."""
        numbers = [DEFAULT_PROPERTIES.atomic_number(label) for label in WATER_LABELS]
        table = perceive_bonds(WATER_COORDS, numbers, blow_factor=1.2)
        self.assertTrue(table.has_bond(0, 1))
        self.assertTrue(table.has_bond(0, 2))
        self.assertFalse(table.has_bond(1, 2))
        self.assertTrue(table.has_bond(1, 1))
        self.assertEqual(table.bonds_of(0), [1, 2])


class TestFragment(unittest.TestCase):
    """Test fragment poses, copies and flexible bodies."""

    def setUp(self):
        self.rng = np.random.default_rng(42)

    def test_orientation_is_sanitized(self):
        """Assigning an orientation wraps it into range."""
        fragment = Fragment.from_cartesian(0, "water", WATER_LABELS, WATER_COORDS)
        fragment.orientation = [3 * math.pi, 2.0, -4.0]
        phi, omega, psi = fragment.orientation
        self.assertTrue(-math.pi < phi <= math.pi)
        self.assertTrue(-0.5 * math.pi < omega <= 0.5 * math.pi)
        self.assertTrue(-math.pi < psi <= math.pi)

    def test_from_cartesian_reproduces_coordinates(self):
        """A fresh fragment rebuilds its input coordinates."""
        fragment = Fragment.from_cartesian(0, "water", WATER_LABELS, WATER_COORDS + 5.0)
        np.testing.assert_allclose(fragment.cartesian(), WATER_COORDS + 5.0, atol=1e-12)
        np.testing.assert_allclose(
            fragment.reference_coords.T @ DEFAULT_PROPERTIES.weights(fragment.atomic_numbers),
            np.zeros(3), atol=1e-12
        )

    def test_rotation_about_com(self):
        """Orientation rotates the body around the COM."""
        fragment = Fragment.from_cartesian(0, "water", WATER_LABELS, WATER_COORDS)
        eulers = [0.1, 0.2, 0.3]
        fragment.orientation = eulers
        expected = fragment.reference_coords @ rotation_matrix(eulers).T + fragment.com
        np.testing.assert_allclose(fragment.cartesian(), expected, atol=1e-12)

    def test_flexible_body_matches_reference(self):
        """Unmodified internal coordinates rebuild the reference frame."""
        coords = self.rng.normal(scale=1.5, size=(5, 3))
        labels = ["C", "H", "H", "O", "H"]
        fragment = Fragment.from_cartesian(0, "mol", labels, coords, flexible=True)
        self.assertTrue(fragment.flexible)
        self.assertEqual(fragment.dof_mask.shape, (3, 5))
        np.testing.assert_allclose(fragment.body_coords(), fragment.reference_coords, atol=1e-6)
        np.testing.assert_allclose(fragment.cartesian(), coords, atol=1e-6)

    def test_invalid_masks(self):
        """Masks of the wrong shape are rejected."""
        with self.assertRaises(ValueError):
            Fragment(0, "w", WATER_LABELS, [8, 1, 1], WATER_COORDS,
                     constraint_mask=np.zeros((3, 2), dtype=bool))
        with self.assertRaises(ValueError):
            Fragment(0, "w", WATER_LABELS, [8, 1], WATER_COORDS)

    def test_copy_is_deep(self):
        """Modifying a copy leaves the original untouched."""
        fragment = Fragment.from_cartesian(0, "mol", ["C", "O", "H", "H"],
                                           self.rng.normal(size=(4, 3)), flexible=True)
        copy = fragment.copy()
        copy.com = [9.0, 9.0, 9.0]
        copy.reference_coords[0, 0] = 100.0
        copy.internal.values[1, 0] = 100.0
        self.assertFalse(np.allclose(fragment.com, [9.0, 9.0, 9.0]))
        self.assertNotEqual(fragment.reference_coords[0, 0], 100.0)
        self.assertNotEqual(fragment.internal.values[1, 0], 100.0)
        self.assertEqual(copy.species_id, fragment.species_id)

    def test_single_atom_keeps_exact_position(self):
        """A single atom sits exactly at its input position with a zero body frame."""
        fragment = Fragment.from_cartesian(0, "argon", ["Ar"], [1.0, -2.0, 3.5])
        np.testing.assert_array_equal(fragment.com, [1.0, -2.0, 3.5])
        np.testing.assert_array_equal(fragment.reference_coords, np.zeros((1, 3)))
        np.testing.assert_array_equal(fragment.cartesian(), [[1.0, -2.0, 3.5]])

    def test_swap_poses(self):
        """Swapping poses exchanges COM and orientation only."""
        a = Fragment.from_cartesian(0, "A", ["Ar"], np.array([1.0, 2.0, 3.0]))
        b = Fragment.from_cartesian(1, "B", ["Ne"], np.array([-1.0, 0.0, 0.0]))
        b.orientation = [0.5, 0.0, 0.0]
        swap_poses(a, b)
        np.testing.assert_allclose(a.com, [-1.0, 0.0, 0.0])
        np.testing.assert_allclose(b.com, [1.0, 2.0, 3.0])
        self.assertAlmostEqual(a.orientation[0], 0.5)
        self.assertEqual((a.species_id, b.species_id), ("A", "B"))
        self.assertEqual((a.labels, b.labels), (["Ar"], ["Ne"]))

    def test_internal_coordinate_shapes(self):
        """Mismatched internal coordinate arrays are rejected."""
        with self.assertRaises(ValueError):
            InternalCoordinates(np.zeros((3, 3), dtype=int), np.zeros((2, 3)))


class TestStructure(unittest.TestCase):
    """Test structure bookkeeping."""

    def setUp(self):
        self.structure = water_cluster([[0, 0, 0], [6, 0, 0], [0, 6, 0]], structure_id=5)

    def test_counts(self):
        """Fragment, atom and species bookkeeping."""
        self.assertEqual(self.structure.n_fragments, 3)
        self.assertEqual(self.structure.n_atoms, 9)
        self.assertEqual(self.structure.atom_offsets(), [0, 3, 6])
        self.assertEqual(self.structure.species_counts(), {"water": 3})
        self.assertEqual(self.structure.fitness, FITNESS_UNEVALUATED)
        self.assertEqual(self.structure.bonds.n_atoms, 9)

    def test_bond_table_mismatch(self):
        """A bond table that does not cover all atoms is an invariant violation."""
        with self.assertRaises(InvariantViolation):
            Structure(fragments=self.structure.fragments, bonds=BondTable(4))

    def test_flat_coordinates_layout(self):
        """Flat coordinates list all x, then all y, then all z."""
        coords = self.structure.cartesian()
        flat = self.structure.flat_coordinates()
        np.testing.assert_allclose(flat[:9], coords[:, 0])
        np.testing.assert_allclose(flat[9:18], coords[:, 1])
        np.testing.assert_allclose(flat[18:], coords[:, 2])

    def test_move_to_com(self):
        """Centering puts the mass-weighted COM at the origin."""
        self.structure.move_to_com()
        coords = self.structure.cartesian()
        weights = DEFAULT_PROPERTIES.weights(self.structure.atomic_numbers())
        np.testing.assert_allclose(np.average(coords, axis=0, weights=weights),
                                   np.zeros(3), atol=1e-10)

    def test_rotate_about_origin(self):
        """Rotating the structure rotates every atom."""
        matrix = rotation_matrix([0.3, -0.4, 1.2])
        before = self.structure.cartesian()
        self.structure.rotate_about_origin(matrix)
        np.testing.assert_allclose(self.structure.cartesian(), before @ matrix.T, atol=1e-9)

    def test_copy_is_deep(self):
        """Copies carry lineage and do not share fragments or bonds."""
        self.structure.bonds.set_bond(0, 1)
        self.structure.metadata['note'] = 'x'
        self.structure.metadata['crossover_notes'] = ['a']
        copy = self.structure.copy()
        copy.fragments[0].com = [50.0, 0.0, 0.0]
        copy.bonds.set_bond(0, 1, False)
        copy.metadata['crossover_notes'].append('b')
        self.assertEqual(copy.id, 5)
        self.assertFalse(np.allclose(self.structure.fragments[0].com, [50.0, 0.0, 0.0]))
        self.assertTrue(self.structure.bonds.has_bond(0, 1))
        self.assertEqual(copy.metadata['note'], 'x')
        self.assertEqual(self.structure.metadata['crossover_notes'], ['a'])
        self.assertEqual(copy.metadata['crossover_notes'], ['a', 'b'])

    def test_reassign_fragment_ids(self):
        """Fragment ids follow array positions."""
        structure = atom_structure([[0, 0, 0], [5, 0, 0]], ["A", "B"])
        structure.fragments.reverse()
        structure.reassign_fragment_ids()
        self.assertEqual([f.id for f in structure.fragments], [0, 1])
        self.assertEqual(structure.species_ids(), ["B", "A"])


if __name__ == '__main__':
    unittest.main()
