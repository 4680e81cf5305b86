# tests/test_selections.py
import numpy as np
import pytest

from posekit.graph import Atom, Residue, Segment
from posekit.peptides import build_peptide, mutate
from posekit.selections import (
  FieldSelection,
  PromoteSelection,
  an,
  everything,
  promote_mask,
  rid,
  rn,
  sn,
  within,
)
from posekit.templates import default_library


@pytest.fixture(scope="module")
def library():
  return default_library()


@pytest.fixture
def pose(library):
  return build_peptide(library, "ACDG")


SELECTIONS = [
  an("CA"),
  an("C.*", regex=True),
  rn("ALA", "GLY"),
  rid(2, 3),
  sn("A"),
  everything(),
  an("CB") | rn("GLY"),
  rn("CYS") & an("SG"),
  within(2.0, an("SG")),
  an("N").promote(Residue, mode="all"),
]


@pytest.mark.parametrize("sel", SELECTIONS, ids=repr)
def test_selection_and_not_selection_is_empty(pose, sel):
  assert not (sel & ~sel)(pose).any()
  assert (sel | ~sel)(pose).all()


def test_atom_name_selection(pose):
  mask = an("CA")(pose)
  assert mask.dtype == bool
  assert mask.shape == (len(pose),)
  assert mask.sum() == 4


def test_regex_field_selection(pose):
  atoms = an("C.*", regex=True)(pose, gather=True)
  assert atoms and all(atom.name.startswith("C") for atom in atoms)
  assert not any(atom.name == "N" for atom in atoms)


def test_cross_granularity_and_is_atom_level(pose):
  atoms = (rn("ALA") & an("CB"))(pose, gather=True)
  assert len(atoms) == 1
  assert atoms[0].name == "CB" and atoms[0].container.name == "ALA"


def test_gather_is_ordered_by_index(pose):
  atoms = (an("O") | an("N"))(pose, gather=True)
  indices = [atom.index for atom in atoms]
  assert indices == sorted(indices)
  assert len(atoms) == 8


def test_residue_range(pose):
  residues = rid(2, 3)(pose, gather=True)
  assert [r.id for r in residues] == [2, 3]
  assert all(isinstance(r, Residue) for r in residues)
  assert [r.id for r in rid(4)(pose, gather=True)] == [4]


def test_promote_any_and_all(pose):
  assert an("CA").promote(Residue)(pose).all()
  assert not an("CA").promote(Residue, mode="all")(pose).any()
  assert an("N", "CA", "C", "O").promote(Residue, mode="all")(pose, gather=True)[0].name == "GLY"
  segments = an("SG").promote(Segment)(pose, gather=True)
  assert [s.name for s in segments] == ["A"]


def test_promote_down_to_atoms(pose):
  atoms = rn("CYS").promote(Atom)(pose, gather=True)
  assert {atom.container.name for atom in atoms} == {"CYS"}
  assert len(atoms) == len(pose.residues()[1])


def test_promote_mask_round_trip(pose):
  residue_mask = np.array([True, False, True, False])
  atom_mask = promote_mask(pose, residue_mask, Residue, Atom)
  assert np.array_equal(promote_mask(pose, atom_mask, Atom, Residue, "all"), residue_mask)


def test_within_uses_current_coordinates(pose):
  near = within(1.6, an("CA"))(pose, gather=True)
  names = {atom.name for atom in near}
  assert {"N", "CA", "C", "CB"} <= names
  exact = within(0.0, an("CA"))(pose, gather=True)
  assert [atom.name for atom in exact] == ["CA"] * 4


def test_selections_are_not_cached(pose, library):
  sel = rn("ALA")
  assert sel(pose).sum() == 1
  mutate(pose, pose.residues()[3], library, "A")
  assert sel(pose).sum() == 2
  assert an("CB")(pose).sum() == 4


def test_invalid_selection_options():
  with pytest.raises(ValueError):
    an("CA").promote(Residue, mode="most")
  with pytest.raises(ValueError):
    PromoteSelection(an("CA"), int)
  with pytest.raises(ValueError):
    within(-1.0, an("CA"))


def test_field_selection_accepts_single_value(pose):
  assert FieldSelection(Atom, "name", "CA")(pose).sum() == 4
  assert FieldSelection(Residue, "id", 3)(pose, gather=True)[0].name == "ASP"
