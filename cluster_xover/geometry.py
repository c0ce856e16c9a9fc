"""
Geometry helpers for rigid-body fragments.

Euler angles follow the yaw-pitch-roll convention (phi, omega, psi) with
R = Rz(psi) @ Ry(omega) @ Rx(phi). Coordinates are (n, 3) arrays in bohr.
"""

import math
import warnings
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation


PHI_RANGE = (-math.pi, math.pi)
OMEGA_RANGE = (-0.5 * math.pi, 0.5 * math.pi)
PSI_RANGE = (-math.pi, math.pi)


def _sanitize_periodic(value: float, lower: float, upper: float) -> float:
    """Wrap value into the half-open interval (lower, upper]."""
    period = upper - lower
    wrapped = upper - ((upper - value) % period)
    if wrapped <= lower:
        # float rounding at the lower edge
        wrapped += period
    return wrapped


def sanitize_phi(phi: float) -> float:
    return _sanitize_periodic(float(phi), *PHI_RANGE)


def sanitize_omega(omega: float) -> float:
    return _sanitize_periodic(float(omega), *OMEGA_RANGE)


def sanitize_psi(psi: float) -> float:
    return _sanitize_periodic(float(psi), *PSI_RANGE)


def sanitize_eulers(eulers: Sequence[float]) -> np.ndarray:
    """
    Wrap a (phi, omega, psi) triple into its valid ranges.

    phi and psi end up in (-pi, pi], omega in (-pi/2, pi/2]. Applying this
    twice yields the same result as applying it once.

    Args:
        eulers: Three Euler angles

    Returns:
        New array with sanitized angles
    """
    if len(eulers) != 3:
        raise ValueError(f"Expected three Euler angles, got {len(eulers)}")
    return np.array([
        sanitize_phi(eulers[0]),
        sanitize_omega(eulers[1]),
        sanitize_psi(eulers[2]),
    ])


def rotation_matrix(eulers: Sequence[float]) -> np.ndarray:
    """3x3 rotation matrix for yaw-pitch-roll angles (phi, omega, psi)."""
    phi, omega, psi = eulers
    return Rotation.from_euler("ZYX", [psi, omega, phi]).as_matrix()


def eulers_from_matrix(matrix: np.ndarray) -> np.ndarray:
    """Inverse of rotation_matrix, returned sanitized."""
    with warnings.catch_warnings():
        # gimbal lock is resolved by scipy by zeroing the third angle
        warnings.simplefilter("ignore", UserWarning)
        psi, omega, phi = Rotation.from_matrix(matrix).as_euler("ZYX")
    return sanitize_eulers([phi, omega, psi])


def rotate(coords: np.ndarray, eulers: Sequence[float]) -> np.ndarray:
    """Rotate (n, 3) coordinates about the origin."""
    return np.asarray(coords, dtype=float) @ rotation_matrix(eulers).T


def random_rotation_matrix(rng: np.random.Generator) -> np.ndarray:
    """Uniformly distributed random rotation drawn from the given generator."""
    return Rotation.random(None, rng).as_matrix()


def center_of_mass(coords: np.ndarray, weights: Sequence[float]) -> np.ndarray:
    coords = np.asarray(coords, dtype=float)
    weights = np.asarray(weights, dtype=float)
    total = weights.sum()
    if total <= 0.0:
        return coords.mean(axis=0)
    return (weights[:, None] * coords).sum(axis=0) / total


def align_onto(mobile: np.ndarray, reference: np.ndarray,
               weights: Optional[Sequence[float]] = None) -> np.ndarray:
    """
    Rotate centered coordinates onto a centered reference (Kabsch).

    Both inputs must already share the same origin.
    """
    mobile = np.asarray(mobile, dtype=float)
    reference = np.asarray(reference, dtype=float)
    if len(mobile) < 2:
        return mobile.copy()
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", UserWarning)
        rot, _ = Rotation.align_vectors(reference, mobile, weights=weights)
    return rot.apply(mobile)


def _angle(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> float:
    """Angle a-b-c in radians."""
    v1 = a - b
    v2 = c - b
    cos = np.dot(v1, v2) / (np.linalg.norm(v1) * np.linalg.norm(v2))
    return float(np.arccos(np.clip(cos, -1.0, 1.0)))


def _dihedral(a: np.ndarray, b: np.ndarray, c: np.ndarray, d: np.ndarray) -> float:
    """Dihedral a-b-c-d in radians, (-pi, pi]."""
    b0 = a - b
    b1 = c - b
    b2 = d - c
    b1 = b1 / np.linalg.norm(b1)
    v = b0 - np.dot(b0, b1) * b1
    w = b2 - np.dot(b2, b1) * b1
    x = np.dot(v, w)
    y = np.dot(np.cross(b1, v), w)
    return float(np.arctan2(y, x))


def cartesian_to_zmatrix(coords: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build a chain Z-matrix for a set of coordinates.

    Atom i is bonded to i-1, angled against i-2 and twisted against i-3.

    Returns:
        Tuple of (connectivity, values); connectivity is an (n, 3) int array
        with -1 for undefined references, values holds (bond, angle, dihedral)
    """
    coords = np.asarray(coords, dtype=float)
    n = len(coords)
    connectivity = np.full((n, 3), -1, dtype=int)
    values = np.zeros((n, 3))

    for i in range(1, n):
        connectivity[i, 0] = i - 1
        values[i, 0] = np.linalg.norm(coords[i] - coords[i - 1])
        if i >= 2:
            connectivity[i, 1] = i - 2
            values[i, 1] = _angle(coords[i], coords[i - 1], coords[i - 2])
        if i >= 3:
            connectivity[i, 2] = i - 3
            values[i, 2] = _dihedral(coords[i - 3], coords[i - 2], coords[i - 1], coords[i])

    return connectivity, values


def zmatrix_to_cartesian(connectivity: np.ndarray, values: np.ndarray) -> np.ndarray:
    """
    Place atoms from a Z-matrix (natural extension reference frame).

    The first atom sits at the origin, the second on +x, the third in the
    xy plane. The result is in an arbitrary frame.
    """
    n = len(values)
    xyz = np.zeros((n, 3))

    for i in range(1, n):
        bond_to, angle_to, dihedral_to = connectivity[i]
        r, theta, phi = values[i]
        c = xyz[bond_to]

        if i == 1:
            xyz[i] = c + np.array([r, 0.0, 0.0])
            continue

        b = xyz[angle_to]
        if i == 2 or dihedral_to < 0:
            a = b + np.array([0.0, 1.0, 0.0])
            if np.linalg.norm(np.cross(a - b, c - b)) < 1e-10:
                a = b + np.array([0.0, 0.0, 1.0])
            if i == 2:
                phi = 0.0
        else:
            a = xyz[dihedral_to]

        bc = c - b
        bc /= np.linalg.norm(bc)
        normal = np.cross(b - a, bc)
        normal /= np.linalg.norm(normal)
        m = np.cross(normal, bc)

        d2 = np.array([
            -r * math.cos(theta),
            r * math.sin(theta) * math.cos(phi),
            r * math.sin(theta) * math.sin(phi),
        ])
        xyz[i] = c + d2[0] * bc + d2[1] * m + d2[2] * normal

    return xyz
