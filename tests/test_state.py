# tests/test_state.py
import numpy as np
import pytest

from posekit.errors import StaleStateError, StructureIntegrityError
from posekit.geometry import angle, deg_to_rad, dihedral, distance, place_atom, wrap_angle
from posekit.graph import Atom, Residue, Segment, Topology
from posekit.peptides import build_peptide, set_phi, set_psi
from posekit.pose import Pose
from posekit.state import State, SyncStatus, c2i, i2c
from posekit.templates import default_library


@pytest.fixture(scope="module")
def library():
  return default_library()


@pytest.fixture
def pose(library):
  return build_peptide(library, "ACDEFW")


# -----------------------------
# Geometry helpers
# -----------------------------


@pytest.mark.parametrize("bond,theta,phi", [(1.5, 1.9, 0.7), (1.33, 2.1, -2.5), (1.0, 1.2, np.pi)])
def test_place_atom_matches_measurements(bond, theta, phi):
  a = np.array([0.3, 1.2, -0.4])
  b = np.array([0.0, 0.0, 0.0])
  c = np.array([1.4, 0.1, 0.2])
  d = place_atom(a, b, c, bond, theta, phi)
  assert distance(c, d) == pytest.approx(bond)
  assert angle(b, c, d) == pytest.approx(theta)
  assert wrap_angle(dihedral(a, b, c, d) - phi) == pytest.approx(0.0, abs=1e-9)


def test_dihedral_sign_convention():
  a = [0.0, 1.0, 0.0]
  b = [0.0, 0.0, 0.0]
  c = [1.0, 0.0, 0.0]
  assert dihedral(a, b, c, [1.0, 1.0, 0.0]) == pytest.approx(0.0)
  assert dihedral(a, b, c, [1.0, 0.0, 1.0]) == pytest.approx(np.pi / 2)
  assert abs(dihedral(a, b, c, [1.0, -1.0, 0.0])) == pytest.approx(np.pi)


def test_wrap_angle_range():
  assert wrap_angle(np.pi) == pytest.approx(np.pi)
  assert wrap_angle(-np.pi) == pytest.approx(np.pi)
  assert wrap_angle(3 * np.pi / 2) == pytest.approx(-np.pi / 2)
  wrapped = wrap_angle(np.array([0.0, 2 * np.pi, -3 * np.pi / 2]))
  assert np.allclose(wrapped, [0.0, 0.0, np.pi / 2])


def test_place_atom_overlapping_references_raise():
  with pytest.raises(ValueError):
    place_atom([0, 1, 0], [0, 0, 0], [0, 0, 0], 1.0, 1.0, 1.0)


# -----------------------------
# Sync contract
# -----------------------------


def test_new_peptide_needs_i2c(pose):
  assert pose.state.status == SyncStatus.INTERNAL_VALID
  assert pose.state.needs_i2c
  with pytest.raises(StaleStateError):
    pose.state.coords


def test_round_trip_reproduces_cartesian(pose):
  residues = pose.residues()
  for i, residue in enumerate(residues):
    set_phi(pose, residue, deg_to_rad(-70.0 + 10 * i))
    set_psi(pose, residue, deg_to_rad(130.0 - 25 * i))
  reference = pose.coords.copy()

  pose.request_c2i()
  pose.sync_to_internal()
  pose.request_i2c()
  pose.sync_to_cartesian()
  assert np.allclose(pose.coords, reference, atol=1e-6)


def test_round_trip_from_perturbed_cartesian(pose):
  rng = np.random.default_rng(0)
  coords = pose.coords + rng.normal(scale=0.2, size=pose.coords.shape)
  pose.state.set_coords(coords)
  assert pose.state.needs_c2i
  pose.sync_to_internal()
  pose.request_i2c()
  assert np.allclose(pose.coords, coords, atol=1e-6)


@pytest.mark.parametrize("target", [[0.0, 0.0, 0.0], [-1.0, 0.0, 0.0], [12.0, -3.5, 7.25]])
def test_round_trip_with_root_anywhere(library, target):
  pose = build_peptide(library, "AGS")
  coords = pose.coords - pose.coords[0] + np.array(target)
  pose.state.set_coords(coords)
  pose.sync_to_internal()
  pose.request_i2c()
  assert np.allclose(pose.coords, coords, atol=1e-6)


def test_translation_only_changes_root_internals(pose):
  pose.sync()
  internals = pose.internals.copy()
  pose.state.set_coords(pose.coords + np.array([5.0, -2.0, 3.0]))
  moved = pose.internals
  assert np.allclose(moved[1:], internals[1:], atol=1e-9)
  assert not np.allclose(moved[0], internals[0])


def test_sync_is_idempotent(pose):
  pose.sync()
  assert pose.state.status == SyncStatus.BOTH_VALID
  counts = (pose.state.i2c_count, pose.state.c2i_count)
  coords = pose.state.coords.copy()
  pose.sync()
  assert (pose.state.i2c_count, pose.state.c2i_count) == counts
  assert np.array_equal(pose.state.coords, coords)


def test_lazy_i2c_batches_multiple_edits(pose):
  pose.sync()
  before = pose.state.i2c_count
  residues = pose.residues()
  set_phi(pose, residues[1], -1.0)
  set_psi(pose, residues[2], 2.0)
  assert pose.state.i2c_count == before
  pose.coords
  assert pose.state.i2c_count == before + 1


def test_i2c_only_moves_downstream_atoms(pose):
  reference = pose.coords.copy()
  residues = pose.residues()
  set_psi(pose, residues[3], 1.0)
  coords = pose.coords
  upstream = [atom.index for residue in residues[:3] for atom in residue]
  assert np.array_equal(coords[upstream], reference[upstream])
  assert not np.allclose(coords[residues[5]["CA"].index], reference[residues[5]["CA"].index])


def test_stale_reads_and_writes_raise(library):
  state = State.from_internals(np.ones((2, 3)))
  with pytest.raises(StaleStateError):
    state.coords
  with pytest.raises(StaleStateError):
    state.set_coords(np.zeros((2, 3)))
  with pytest.raises(StaleStateError):
    state.request_c2i()

  state = State.from_cartesian(np.zeros((2, 3)))
  with pytest.raises(StaleStateError):
    state.internals
  with pytest.raises(StaleStateError):
    state.set_internals([0], phi=1.0)
  with pytest.raises(StaleStateError):
    state.request_i2c()


def test_sync_of_empty_state_raises():
  topology = Topology()
  with pytest.raises(StaleStateError):
    i2c(State(0), topology)
  with pytest.raises(StaleStateError):
    c2i(State(0), topology)


def test_state_arrays_are_read_only(pose):
  with pytest.raises(ValueError):
    pose.coords[0, 0] = 1.0


def test_reindexed_rejects_duplicate_rows():
  state = State.from_cartesian(np.zeros((3, 3)))
  with pytest.raises(StructureIntegrityError):
    state.reindexed(np.array([0, 0, 1]))
  with pytest.raises(StructureIntegrityError):
    state.reindexed(np.array([0, 5]))


def test_reindexed_inserts_need_valid_internals():
  state = State.from_cartesian(np.zeros((2, 3)))
  with pytest.raises(StaleStateError):
    state.reindexed(np.array([0, -1, 1]))
  state = State.from_internals(np.ones((2, 3)))
  new = state.reindexed(np.array([1, -1, 0]))
  assert new.size == 3
  assert new.needs_i2c
  assert list(new.pending) == [0, 1, 2]
  assert np.array_equal(new.internals[2], np.ones(3))


# -----------------------------
# Structural integrity
# -----------------------------


def _two_atom_topology():
  topology = Topology("T")
  segment = Segment("A")
  topology.add(segment)
  residue = Residue("GLY", 1)
  segment.add(residue)
  a = Atom("N", "N", 0)
  b = Atom("CA", "C", 1)
  residue.add(a)
  residue.add(b)
  Topology.set_parent(b, a)
  Topology.bond(a, b)
  return topology, a, b


def test_ascendents_are_padded_with_origin_frame():
  topology, a, b = _two_atom_topology()
  assert topology.ascendents(a) == (-1, -2, -3)
  assert topology.ascendents(b) == (0, -1, -2)


def test_cycle_in_tree_is_fatal(pose):
  first = pose.residues()[0]
  Topology.set_parent(first["N"], first["CA"])
  pose.request_i2c()
  with pytest.raises(StructureIntegrityError):
    pose.sync_to_cartesian()


def test_foreign_parent_is_fatal():
  topology, a, b = _two_atom_topology()
  Topology.set_parent(b, Atom("X", "C", 7))
  with pytest.raises(StructureIntegrityError):
    topology.traverse()


def test_misaligned_state_is_rejected():
  topology, a, b = _two_atom_topology()
  with pytest.raises(StructureIntegrityError):
    Pose(topology, State.from_cartesian(np.zeros((3, 3))))
  b.index = 5
  with pytest.raises(StructureIntegrityError):
    Pose(topology, State.from_cartesian(np.zeros((2, 3))))


def test_detach_with_children_raises():
  topology, a, b = _two_atom_topology()
  with pytest.raises(StructureIntegrityError):
    topology.detach(a)
  topology.detach(b)
  assert a.bonds == [] and a.children == []
  assert topology.count_atoms() == 1


def test_topology_copy_is_independent(pose):
  copy = pose.topology.copy()
  original = list(pose.topology.atoms())
  copied = list(copy.atoms())
  assert [a.name for a in original] == [a.name for a in copied]
  assert all(x is not y for x, y in zip(original, copied))
  for x, y in zip(original, copied):
    assert [n.index for n in x.bonds] == [n.index for n in y.bonds]
    assert (x.parent is None) == (y.parent is None)
    if x.parent is not None:
      assert x.parent.index == y.parent.index
      assert y.parent in y.parent.container.items
  copy.traverse()
