# tests/test_energy.py
import numpy as np
import pytest

from posekit.energy import BondRestraint, ClashRestraint, DistanceRestraint, Energy, Evaluator
from posekit.peptides import build_peptide, mutate, set_phi
from posekit.templates import default_library


@pytest.fixture(scope="module")
def library():
  return default_library()


@pytest.fixture
def pose(library):
  return build_peptide(library, "GAG")


def _key(atom):
  return (atom.container.container.name, atom.container.id, atom.name)


def _finite_difference(evaluator, pose, index, axis, h=1e-5):
  coords = pose.coords.copy()
  plus = coords.copy()
  plus[index, axis] += h
  minus = coords.copy()
  minus[index, axis] -= h
  pose.state.set_coords(plus)
  e_plus = evaluator(pose).total
  pose.state.set_coords(minus)
  e_minus = evaluator(pose).total
  pose.state.set_coords(coords)
  return (e_plus - e_minus) / (2 * h)


def test_distance_restraint_energy_and_direction(pose):
  first = pose.residues()[0]
  n, c = first["N"], first["C"]
  d = np.linalg.norm(pose.coords[n.index] - pose.coords[c.index])
  restraint = DistanceRestraint([(_key(n), _key(c), d + 0.5)], k=10.0)
  energy = Evaluator([restraint])(pose, forces=True)
  assert isinstance(energy, Energy)
  assert energy.total == pytest.approx(10.0 * 0.25)
  assert energy.components == pytest.approx({"distance": 2.5})
  # too short, so N is pushed away from C
  assert np.dot(energy.forces[n.index], pose.coords[n.index] - pose.coords[c.index]) > 0
  assert np.allclose(energy.forces.sum(axis=0), 0.0)


def test_distance_restraint_forces_match_gradient(pose):
  atoms = pose.atoms()
  pairs = [(_key(atoms[0]), _key(atoms[5]), 3.0), (_key(atoms[2]), _key(atoms[-1]), 4.0)]
  evaluator = Evaluator([DistanceRestraint(pairs, k=5.0)])
  forces = evaluator(pose, forces=True).forces
  for index in (0, 2, 5):
    for axis in range(3):
      assert -_finite_difference(evaluator, pose, index, axis) == pytest.approx(forces[index, axis], abs=1e-4)


def test_weights_scale_components(pose):
  first = pose.residues()[0]
  pair = [(_key(first["N"]), _key(first["C"]), 0.0)]
  plain = Evaluator([DistanceRestraint(pair)])(pose).total
  weighted = Evaluator([DistanceRestraint(pair, lam=3.0)])(pose).total
  assert weighted == pytest.approx(3.0 * plain)


def test_bond_restraint_ignores_dihedral_moves(pose):
  evaluator = Evaluator([BondRestraint.from_pose(pose)])
  assert evaluator(pose).total == pytest.approx(0.0, abs=1e-12)
  set_phi(pose, pose.residues()[1], -1.2)
  assert evaluator(pose).total == pytest.approx(0.0, abs=1e-10)


def test_bond_restraint_survives_copy_and_mutation(pose, library):
  restraint = BondRestraint.from_pose(pose)
  evaluator = Evaluator([restraint])
  snapshot = pose.copy()
  pose.restore(snapshot)
  assert evaluator(pose).total == pytest.approx(0.0, abs=1e-12)
  # bonds of removed atoms drop out instead of failing
  mutate(pose, pose.residues()[1], library, "G")
  assert evaluator(pose).total == pytest.approx(0.0, abs=1e-10)


def test_clash_restraint_excludes_bonded_neighbours(pose):
  excluded = ClashRestraint.exclusions(pose.topology)
  first = pose.residues()[0]
  n, ca, c = first["N"].index, first["CA"].index, first["C"].index
  assert (min(n, ca), max(n, ca)) in excluded
  assert (min(n, c), max(n, c)) in excluded
  assert Evaluator([ClashRestraint(cutoff=0.5)])(pose).total == 0.0


def test_clash_restraint_penalises_overlap(pose):
  first, last = pose.residues()[0], pose.residues()[-1]
  coords = pose.coords.copy()
  coords[last["O"].index] = coords[first["N"].index] + np.array([0.3, 0.0, 0.0])
  pose.state.set_coords(coords)
  evaluator = Evaluator([ClashRestraint(cutoff=0.5, k=10.0)])
  energy = evaluator(pose, forces=True)
  assert energy.total == pytest.approx(10.0 * 0.2**2)
  assert energy.forces[last["O"].index, 0] > 0
  assert energy.forces[first["N"].index, 0] < 0
  assert -_finite_difference(evaluator, pose, last["O"].index, 0) == pytest.approx(energy.forces[last["O"].index, 0], abs=1e-4)


def test_evaluation_has_no_side_effects(pose):
  evaluator = Evaluator([BondRestraint.from_pose(pose), ClashRestraint()])
  first = evaluator(pose, forces=True)
  coords = pose.coords.copy()
  count = pose.state.i2c_count
  second = evaluator(pose, forces=True)
  assert second.total == first.total
  assert np.array_equal(pose.coords, coords)
  assert pose.state.i2c_count == count


def test_duplicate_component_names():
  with pytest.raises(ValueError):
    Evaluator([ClashRestraint(), ClashRestraint()])
