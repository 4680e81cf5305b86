# tests/test_mutators.py
import numpy as np
import pytest

from posekit.constants import AVAILABLE_AMINOACIDS
from posekit.drivers import DriverState, DriverStatus
from posekit.geometry import rad_to_deg, wrap_angle
from posekit.mutators import (
  BlockrotMutator,
  DesignMutator,
  DihedralMutator,
  MutationOutcome,
  RotamerMutator,
  gaussian_sampler,
)
from posekit.peptides import apply_ss, build_peptide
from posekit.rotamers import default_rotamer_library
from posekit.selections import an, rid
from posekit.templates import ResidueLibrary, default_library


@pytest.fixture(scope="module")
def library():
  return default_library()


def only(*codes):
  return {code: code in codes for code in AVAILABLE_AMINOACIDS}


class StubCloser:
  """Loop closer that reports a fixed status and counts its runs."""

  def __init__(self, status):
    self.status = status
    self.calls = 0

  def run(self, pose):
    self.calls += 1
    pose.coords
    return DriverState(step=1, status=self.status)


# -----------------------------
# Outcomes
# -----------------------------


def test_outcome_merge():
  merged = MutationOutcome(2).merge(MutationOutcome(1, failed=True, message="closure failed"))
  assert merged.n_mutations == 3
  assert merged.failed
  assert merged.message == "closure failed"


# -----------------------------
# Design mutator
# -----------------------------


def test_three_residue_design_scenario(library):
  pose = build_peptide(library, "AAA")
  pose.sync()
  mutator = DesignMutator(1.0, library, searchable_aminoacids=only("V"), rng=0)
  outcome = mutator(pose)
  assert outcome.n_mutations == 3
  assert not outcome.failed
  assert pose.sequence() == "VVV"
  assert pose.state.needs_i2c


@pytest.mark.parametrize("seed", range(10))
def test_design_never_picks_current_type(library, seed):
  pose = build_peptide(library, "AVAVA")
  DesignMutator(1.0, library, searchable_aminoacids=only("A", "V"), rng=seed)(pose)
  assert pose.sequence() == "VAVAV"


@pytest.mark.parametrize("seed", range(5))
def test_design_with_larger_outcome_set(library, seed):
  pose = build_peptide(library, "ACDEF")
  before = pose.sequence()
  DesignMutator(1.0, library, searchable_aminoacids=only("A", "C", "D", "E", "F"), rng=seed)(pose)
  after = pose.sequence()
  assert all(a != b for a, b in zip(before, after))
  assert set(after) <= set("ACDEF")


@pytest.mark.parametrize("seed", range(20))
def test_design_with_three_letter_keys_never_picks_current_type(library, seed):
  pose = build_peptide(library, "AAA")
  mutator = DesignMutator(1.0, library, searchable_aminoacids={"ALA": True, "GLY": True, "trp": False}, rng=seed)
  assert mutator.allowed == ["A", "G"]
  outcome = mutator(pose)
  assert outcome.n_mutations == 3
  assert pose.sequence() == "GGG"


def test_design_merges_duplicate_keys(library):
  mutator = DesignMutator(1.0, library, searchable_aminoacids={"A": True, "ALA": True, "V": True})
  assert mutator.allowed == ["A", "V"]


def test_design_is_reproducible(library):
  sequences = []
  for _ in range(2):
    pose = build_peptide(library, "A" * 12)
    DesignMutator(0.05, library, rng=42)(pose)
    sequences.append(pose.sequence())
  assert sequences[0] == sequences[1]


def test_design_probability_zero_is_noop(library):
  pose = build_peptide(library, "ACD")
  outcome = DesignMutator(0.0, library, rng=1)(pose)
  assert outcome.n_mutations == 0
  assert pose.sequence() == "ACD"


def test_design_respects_explicit_atoms_and_selection(library):
  pose = build_peptide(library, "AAAA")
  mutator = DesignMutator(1.0, library, searchable_aminoacids=only("G"), rng=0)
  outcome = mutator(pose, atoms=[pose.residues()[1]["CA"]])
  assert outcome.n_mutations == 1
  assert pose.sequence() == "AGAA"

  selective = DesignMutator(1.0, library, selection=rid(4), searchable_aminoacids=only("G"), rng=0)
  selective(pose)
  assert pose.sequence() == "AGAG"


def test_design_configuration_fails_fast(library):
  with pytest.raises(ValueError):
    DesignMutator(1.0, library, searchable_aminoacids={})
  with pytest.raises(ValueError):
    DesignMutator(1.0, library, searchable_aminoacids={"A": True, "XYZ": True})
  with pytest.raises(ValueError):
    DesignMutator(1.0, library, searchable_aminoacids={code: False for code in AVAILABLE_AMINOACIDS})
  with pytest.raises(ValueError):
    DesignMutator(1.5, library)
  small = ResidueLibrary([library.lookup("A")])
  with pytest.raises(ValueError):
    DesignMutator(1.0, small, searchable_aminoacids=only("A", "G"))


def test_design_without_alternative_fails_before_editing(library):
  pose = build_peptide(library, "AAA")
  pose.sync()
  coords = pose.coords.copy()
  mutator = DesignMutator(1.0, library, searchable_aminoacids=only("A"), rng=0)
  with pytest.raises(ValueError):
    mutator(pose)
  assert pose.sequence() == "AAA"
  assert np.array_equal(pose.coords, coords)


def test_design_copies_availability_map(library):
  allowed = only("A", "G")
  mutator = DesignMutator(1.0, library, searchable_aminoacids=allowed)
  allowed["W"] = True
  assert mutator.searchable_aminoacids["W"] is False
  assert "W" not in mutator.allowed


# -----------------------------
# Rotamer and dihedral mutators
# -----------------------------


def test_rotamer_mutator_sets_staggered_chi(library):
  rotamers = default_rotamer_library(library)
  pose = build_peptide(library, "SSS")
  outcome = RotamerMutator(rotamers, p_mut=1.0, rng=3)(pose)
  assert outcome.n_mutations == 3
  for residue in pose.residues():
    chi = rad_to_deg(pose.get_dihedral(residue["OG"]))
    assert min(abs(rad_to_deg(wrap_angle(np.radians(chi - ref)))) for ref in (-60.0, 60.0, 180.0)) < 1e-6


def test_rotamer_mutator_skips_residues_without_rotamers(library):
  rotamers = default_rotamer_library(library)
  pose = build_peptide(library, "GAG")
  assert RotamerMutator(rotamers, rng=0)(pose).n_mutations == 0


def test_dihedral_mutator_turns_each_bond_once(library):
  pose = build_peptide(library, "AAA")
  pose.sync()
  before = pose.internals.copy()
  outcome = DihedralMutator(p_mut=1.0, step_size=0.5, selection=an("C"), rng=0)(pose)
  assert outcome.n_mutations == 3
  after = pose.state.internals
  changed = np.flatnonzero(~np.isclose(before[:, 2], after[:, 2]))
  names = sorted({pose.atoms()[i].name for i in changed})
  # C turns together with its sibling CB
  assert names == ["C", "CB"]
  assert np.allclose(before[:, :2], after[:, :2])
  assert pose.state.needs_i2c


def test_dihedral_mutator_with_gaussian_sampler(library):
  pose = build_peptide(library, "AAA")
  mutator = DihedralMutator(gaussian_sampler(0.1), p_mut=0.0, rng=0)
  assert mutator(pose).n_mutations == 0


# -----------------------------
# Block rotation
# -----------------------------


@pytest.fixture
def helix(library):
  pose = build_peptide(library, "AAAAAAAA")
  apply_ss(pose, "CHHHHHCC")
  pose.sync()
  return pose


def _block_indices(pose, first, last):
  return [atom.index for residue in pose.residues()[first : last + 1] for atom in residue]


def test_blockrot_is_rigid_and_local(helix):
  coords = helix.coords.copy()
  closer = StubCloser(DriverStatus.CONVERGED)
  mutator = BlockrotMutator([(1, 5)], step_size=0.5, translation_step_size=0.5, loop_closer=closer, rng=0)
  outcome = mutator(helix)
  assert outcome.n_mutations == 1 and not outcome.failed
  assert closer.calls == 1
  assert helix.state.needs_c2i

  block = _block_indices(helix, 1, 5)
  rest = [i for i in range(len(helix)) if i not in block]
  moved = helix.coords
  assert np.array_equal(moved[rest], coords[rest])
  assert not np.allclose(moved[block], coords[block])
  before = np.linalg.norm(coords[block][:, None] - coords[block][None], axis=-1)
  after = np.linalg.norm(moved[block][:, None] - moved[block][None], axis=-1)
  assert np.allclose(before, after, atol=1e-8)


def test_blockrot_failure_is_reported_and_reverted(helix):
  coords = helix.coords.copy()
  closer = StubCloser(DriverStatus.STEP_LIMIT_REACHED)
  mutator = BlockrotMutator([(1, 5)], n_tries=3, loop_closer=closer, rng=0)
  outcome = mutator(helix)
  assert outcome.failed
  assert outcome.n_mutations == 0
  assert "step_limit_reached" in outcome.message
  assert closer.calls == 3
  assert not helix.state.needs_c2i and not helix.state.needs_i2c
  assert np.array_equal(helix.coords, coords)


def test_blockrot_without_closer_keeps_move(helix):
  mutator = BlockrotMutator([(1, 5)], rot_axis="random", rng=1)
  assert mutator(helix).n_mutations == 1
  helix.sync()


def test_blockrot_configuration_fails_fast(helix):
  with pytest.raises(ValueError):
    BlockrotMutator([(1, 5)], rot_axis="sideways")
  with pytest.raises(ValueError):
    BlockrotMutator([(3, 1)])
  with pytest.raises(ValueError):
    BlockrotMutator([(1, 5)], n_tries=0)
  with pytest.raises(ValueError):
    BlockrotMutator([(1, 20)])(helix)
