"""
I/O utilities for cluster crossover.

Handles the binary fragment/structure checkpoint format, XYZ files, and
decomposition of Cartesian structures into fragments.

Checkpoints use big-endian fixed-width fields and length-prefixed UTF-8
strings. XYZ files are in Angstrom; everything in memory is in bohr.
"""

import io
import struct
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Tuple, Union

import numpy as np

from .bonds import BondTable, perceive_bonds
from .data_models import Fragment, InternalCoordinates, Structure
from .properties import AtomicProperties, DEFAULT_PROPERTIES


BOHR_TO_ANGSTROM = 0.529177210903
ANGSTROM_TO_BOHR = 1.0 / BOHR_TO_ANGSTROM

CHECKPOINT_MAGIC = b"CXCK"
CHECKPOINT_VERSION = 1


def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise EOFError(f"Checkpoint truncated: wanted {size} bytes, got {len(data)}")
    return data


def _write(stream: BinaryIO, fmt: str, *values):
    stream.write(struct.pack(">" + fmt, *values))


def _read(stream: BinaryIO, fmt: str) -> tuple:
    fmt = ">" + fmt
    return struct.unpack(fmt, _read_exact(stream, struct.calcsize(fmt)))


def _write_utf(stream: BinaryIO, text: str):
    data = text.encode("utf-8")
    if len(data) > 0xFFFF:
        raise ValueError(f"String too long for checkpoint: {len(data)} bytes")
    _write(stream, "H", len(data))
    stream.write(data)


def _read_utf(stream: BinaryIO) -> str:
    (length,) = _read(stream, "H")
    return _read_exact(stream, length).decode("utf-8")


def _write_bools(stream: BinaryIO, values: np.ndarray):
    flat = np.asarray(values, dtype=bool).ravel()
    stream.write(flat.astype(np.uint8).tobytes())


def _read_bools(stream: BinaryIO, shape: Tuple[int, ...]) -> np.ndarray:
    count = int(np.prod(shape))
    return np.frombuffer(_read_exact(stream, count), dtype=np.uint8).astype(bool).reshape(shape)


def _write_array(stream: BinaryIO, values: np.ndarray, dtype: str):
    stream.write(np.asarray(values).astype(dtype).tobytes())


def _read_array(stream: BinaryIO, count: int, dtype: str) -> np.ndarray:
    dt = np.dtype(dtype)
    return np.frombuffer(_read_exact(stream, count * dt.itemsize), dtype=dt).copy()


def _internal_to_blob(internal: InternalCoordinates) -> bytes:
    buffer = io.BytesIO()
    _write(buffer, "i", internal.n_atoms)
    _write_array(buffer, internal.connectivity, ">i4")
    _write_array(buffer, internal.values, ">f8")
    return buffer.getvalue()


def _internal_from_blob(blob: bytes) -> InternalCoordinates:
    buffer = io.BytesIO(blob)
    (n,) = _read(buffer, "i")
    connectivity = _read_array(buffer, 3 * n, ">i4").reshape(n, 3)
    values = _read_array(buffer, 3 * n, ">f8").reshape(n, 3)
    return InternalCoordinates(connectivity, values)


def write_fragment(stream: BinaryIO, fragment: Fragment):
    """
    Serialize one fragment.

    Single-atom fragments use a compact record without orientation or
    reference frame; larger fragments carry the full pose, per-atom arrays,
    reference coordinates (all x, then all y, then all z) and, if flexible,
    an internal coordinate blob.
    """
    _write(stream, "i", fragment.id)
    _write_utf(stream, fragment.species_id)
    _write(stream, "i", fragment.n_atoms)

    if fragment.n_atoms == 1:
        _write_utf(stream, fragment.labels[0])
        _write(stream, "h", int(fragment.atomic_numbers[0]))
        _write(stream, "3d", *fragment.com)
        _write(stream, "h", int(fragment.spins[0]))
        _write(stream, "f", float(fragment.charges[0]))
        _write(stream, "d", fragment.energy)
        _write(stream, "?", fragment.constrained)
        if fragment.constrained:
            _write_bools(stream, fragment.constraint_mask[0])
        return

    _write(stream, "??", fragment.flexible, fragment.constrained)
    if fragment.flexible:
        _write_bools(stream, fragment.dof_mask)
    if fragment.constrained:
        _write_bools(stream, fragment.constraint_mask)
    _write(stream, "7d", fragment.energy, *fragment.com, *fragment.orientation)
    _write_array(stream, fragment.spins, ">i2")
    _write_array(stream, fragment.charges, ">f4")
    for label in fragment.labels:
        _write_utf(stream, label)
    _write_array(stream, fragment.atomic_numbers, ">i2")
    _write_array(stream, fragment.reference_coords.T, ">f8")
    if fragment.flexible:
        blob = _internal_to_blob(fragment.internal)
        _write(stream, "i", len(blob))
        stream.write(blob)


def read_fragment(stream: BinaryIO) -> Fragment:
    """
    Deserialize one fragment written by write_fragment.

    Raises:
        EOFError: If the stream ends inside the record
    """
    (fragment_id,) = _read(stream, "i")
    species_id = _read_utf(stream)
    (n_atoms,) = _read(stream, "i")
    if n_atoms < 1:
        raise ValueError(f"Invalid atom count in checkpoint: {n_atoms}")

    if n_atoms == 1:
        label = _read_utf(stream)
        (atomic_number,) = _read(stream, "h")
        com = _read(stream, "3d")
        (spin,) = _read(stream, "h")
        (charge,) = _read(stream, "f")
        (energy,) = _read(stream, "d")
        (constrained,) = _read(stream, "?")
        constraint_mask = _read_bools(stream, (1, 3)) if constrained else None
        return Fragment(
            id=fragment_id,
            species_id=species_id,
            labels=[label],
            atomic_numbers=[atomic_number],
            reference_coords=np.zeros((1, 3)),
            com=com,
            charges=[charge],
            spins=[spin],
            energy=energy,
            constraint_mask=constraint_mask,
        )

    flexible, constrained = _read(stream, "??")
    dof_mask = _read_bools(stream, (3, n_atoms)) if flexible else None
    constraint_mask = _read_bools(stream, (n_atoms, 3)) if constrained else None
    energy, *pose = _read(stream, "7d")
    spins = _read_array(stream, n_atoms, ">i2")
    charges = _read_array(stream, n_atoms, ">f4")
    labels = [_read_utf(stream) for _ in range(n_atoms)]
    atomic_numbers = _read_array(stream, n_atoms, ">i2")
    reference = _read_array(stream, 3 * n_atoms, ">f8").reshape(3, n_atoms).T
    internal = None
    if flexible:
        (length,) = _read(stream, "i")
        internal = _internal_from_blob(_read_exact(stream, length))

    return Fragment(
        id=fragment_id,
        species_id=species_id,
        labels=labels,
        atomic_numbers=atomic_numbers,
        reference_coords=reference,
        com=pose[0:3],
        orientation=pose[3:6],
        charges=charges,
        spins=spins,
        energy=energy,
        internal=internal,
        dof_mask=dof_mask,
        constraint_mask=constraint_mask,
    )


def fragment_to_bytes(fragment: Fragment) -> bytes:
    buffer = io.BytesIO()
    write_fragment(buffer, fragment)
    return buffer.getvalue()


def fragment_from_bytes(data: bytes) -> Fragment:
    return read_fragment(io.BytesIO(data))


def write_structure(stream: BinaryIO, structure: Structure):
    """Serialize a structure: header, lineage, fitness, fragments, packed bonds."""
    stream.write(CHECKPOINT_MAGIC)
    _write(stream, "h", CHECKPOINT_VERSION)
    _write(stream, "qqqd", structure.id, structure.father_id, structure.mother_id,
           structure.fitness)
    _write(stream, "i", structure.n_fragments)
    for fragment in structure.fragments:
        write_fragment(stream, fragment)
    bits = np.packbits(structure.bonds.matrix.ravel())
    _write(stream, "ii", structure.n_atoms, len(bits))
    stream.write(bits.tobytes())


def read_structure(stream: BinaryIO) -> Structure:
    """
    Deserialize a structure written by write_structure.

    Raises:
        ValueError: If the header is not a structure checkpoint
        EOFError: If the stream is truncated
    """
    magic = _read_exact(stream, len(CHECKPOINT_MAGIC))
    if magic != CHECKPOINT_MAGIC:
        raise ValueError(f"Not a structure checkpoint (magic {magic!r})")
    (version,) = _read(stream, "h")
    if version != CHECKPOINT_VERSION:
        raise ValueError(f"Unsupported checkpoint version: {version}")
    structure_id, father_id, mother_id, fitness = _read(stream, "qqqd")
    (n_fragments,) = _read(stream, "i")
    fragments = [read_fragment(stream) for _ in range(n_fragments)]
    n_atoms, n_bytes = _read(stream, "ii")
    bits = np.frombuffer(_read_exact(stream, n_bytes), dtype=np.uint8)
    matrix = np.unpackbits(bits, count=n_atoms * n_atoms).astype(bool).reshape(n_atoms, n_atoms)
    return Structure(
        fragments=fragments,
        bonds=BondTable(n_atoms, matrix),
        id=structure_id,
        father_id=father_id,
        mother_id=mother_id,
        fitness=fitness,
    )


def save_checkpoint(structure: Structure, path: Union[str, Path]) -> Path:
    """
    Write a structure checkpoint file.

    Args:
        structure: Structure to save
        path: Output file

    Returns:
        Path to the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        write_structure(f, structure)
    return path


def load_checkpoint(path: Union[str, Path]) -> Structure:
    """
    Read a structure checkpoint file.

    Raises:
        FileNotFoundError: If the file doesn't exist
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Checkpoint not found: {path}")
    with open(path, 'rb') as f:
        return read_structure(f)


def structure_from_cartesian(
    labels: Sequence[str],
    coords: np.ndarray,
    fragment_sizes: Sequence[int],
    species_ids: Optional[Sequence[str]] = None,
    properties: AtomicProperties = DEFAULT_PROPERTIES,
    flexible: bool = False,
    bond_blow: Optional[float] = 1.2,
    structure_id: int = 0
) -> Structure:
    """
    Decompose a Cartesian structure into consecutive fragment blocks.

    Args:
        labels: Element label per atom
        coords: (n, 3) coordinates in bohr
        fragment_sizes: Atom count of every fragment, in order
        species_ids: Species id per fragment; defaults to the fragment's
            concatenated labels
        properties: Atomic property table
        flexible: Give every multi-atom fragment internal coordinates
        bond_blow: Blow factor for bond perception, None for an empty table
        structure_id: Id of the new structure

    Returns:
        Structure with perceived bonds

    Raises:
        ValueError: If sizes and atom counts disagree
    """
    coords = np.asarray(coords, dtype=float).reshape(-1, 3)
    if len(labels) != len(coords):
        raise ValueError(f"Got {len(labels)} labels for {len(coords)} atoms")
    if sum(fragment_sizes) != len(coords):
        raise ValueError(
            f"Fragment sizes add up to {sum(fragment_sizes)}, structure has {len(coords)} atoms"
        )
    if species_ids is not None and len(species_ids) != len(fragment_sizes):
        raise ValueError(
            f"Got {len(species_ids)} species ids for {len(fragment_sizes)} fragments"
        )

    fragments = []
    start = 0
    for index, size in enumerate(fragment_sizes):
        block_labels = list(labels[start:start + size])
        species = species_ids[index] if species_ids is not None else "".join(block_labels)
        fragments.append(Fragment.from_cartesian(
            index, species, block_labels, coords[start:start + size],
            properties=properties, flexible=flexible and size > 1,
        ))
        start += size

    if bond_blow is None:
        bonds = BondTable(len(coords))
    else:
        atomic_numbers = [properties.atomic_number(label) for label in labels]
        bonds = perceive_bonds(coords, atomic_numbers, bond_blow, properties)
    return Structure(fragments=fragments, bonds=bonds, id=structure_id)


def read_xyz(path: Union[str, Path]) -> Tuple[List[str], np.ndarray, str]:
    """
    Read an XYZ file.

    Returns:
        Tuple of (labels, coordinates in bohr, comment line)

    Raises:
        FileNotFoundError: If the file doesn't exist
        ValueError: If the file is malformed
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"XYZ file not found: {path}")

    with open(path, 'r') as f:
        lines = f.read().splitlines()

    try:
        n_atoms = int(lines[0].strip())
    except (IndexError, ValueError):
        raise ValueError(f"Invalid XYZ header in {path}")
    if len(lines) < n_atoms + 2:
        raise ValueError(f"XYZ file {path} declares {n_atoms} atoms but is too short")

    labels = []
    coords = np.zeros((n_atoms, 3))
    for i, line in enumerate(lines[2:2 + n_atoms]):
        parts = line.split()
        if len(parts) < 4:
            raise ValueError(f"Invalid XYZ atom line in {path}: {line!r}")
        labels.append(parts[0])
        coords[i] = [float(v) for v in parts[1:4]]

    return labels, coords * ANGSTROM_TO_BOHR, lines[1]


def write_xyz(
    structure: Structure,
    path: Union[str, Path],
    comment: Optional[str] = None,
    properties: AtomicProperties = DEFAULT_PROPERTIES
) -> Path:
    """
    Write a structure as an XYZ file in Angstrom.

    Args:
        structure: Structure to write
        path: Output file
        comment: Comment line, defaults to id and fitness
        properties: Atomic property table

    Returns:
        Path to the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    coords = structure.cartesian(properties) * BOHR_TO_ANGSTROM
    if comment is None:
        comment = f"id {structure.id} fitness {structure.fitness}"

    with open(path, 'w') as f:
        f.write(f"{structure.n_atoms}\n{comment}\n")
        for label, (x, y, z) in zip(structure.labels(), coords):
            f.write(f"{label:<3s} {x:16.10f} {y:16.10f} {z:16.10f}\n")
    return path


def load_structure_xyz(
    path: Union[str, Path],
    fragment_sizes: Sequence[int],
    species_ids: Optional[Sequence[str]] = None,
    properties: AtomicProperties = DEFAULT_PROPERTIES,
    **kwargs
) -> Structure:
    """Read an XYZ file and decompose it into fragments."""
    labels, coords, _ = read_xyz(path)
    return structure_from_cartesian(labels, coords, fragment_sizes, species_ids,
                                    properties, **kwargs)
