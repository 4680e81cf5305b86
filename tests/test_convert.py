# tests/test_convert.py
import io

import numpy as np
import pytest
from Bio.PDB import PDBParser

from posekit.callbacks import pdb_frame_writer
from posekit.convert import load_pose, pose_from_structure, pose_to_structure, save_pose, write_pdb_model
from posekit.drivers import DriverState
from posekit.geometry import deg_to_rad
from posekit.peptides import apply_ss, build_peptide, set_phi
from posekit.templates import default_library


@pytest.fixture(scope="module")
def library():
  return default_library()


@pytest.fixture
def pose(library):
  pose = build_peptide(library, "ACDEFGW", segment="B")
  apply_ss(pose, "CHHHHHC")
  return pose


# -----------------------------
# Structures
# -----------------------------


def test_structure_round_trip(pose, library):
  structure = pose_to_structure(pose)
  chains = list(structure[0])
  assert [chain.id for chain in chains] == ["B"]
  assert len(list(chains[0])) == 7
  back = pose_from_structure(structure, library)
  assert back.sequence() == pose.sequence()
  assert [a.name for a in back.atoms()] == [a.name for a in pose.atoms()]
  assert np.allclose(back.coords, pose.coords, atol=1e-4)
  assert not back.state.needs_c2i and not back.state.needs_i2c
  assert back.residues()[1]["N"].parent is back.residues()[0]["C"]


def test_internals_of_loaded_pose_rebuild_coordinates(pose, library):
  back = pose_from_structure(pose_to_structure(pose), library)
  coords = back.coords.copy()
  back.request_i2c()
  assert np.allclose(back.coords, coords, atol=1e-4)


def test_chain_break_starts_new_root(pose, library):
  structure = pose_to_structure(pose)
  residues = list(structure[0]["B"])
  for residue in residues[4:]:
    for atom in residue:
      atom.set_coord(atom.coord + np.array([15.0, 0.0, 0.0], dtype="f"))
  back = pose_from_structure(structure, library)
  n = back.residues()[4]["N"]
  assert n.is_root
  assert back.residues()[3]["C"] not in n.bonds
  assert sum(1 for atom in back.atoms() if atom.is_root) == 2


def test_unknown_residues_are_skipped(pose, library):
  structure = pose_to_structure(pose)
  list(structure[0]["B"])[-1].resname = "XYZ"
  back = pose_from_structure(structure, library)
  assert back.sequence() == "ACDEFG"


def test_missing_model_raises(pose, library):
  with pytest.raises(ValueError):
    pose_from_structure(pose_to_structure(pose), library, model=1)


# -----------------------------
# Files
# -----------------------------


@pytest.mark.parametrize("suffix", [".pdb", ".cif"])
def test_save_and_load(pose, library, tmp_path, suffix):
  path = str(tmp_path / f"pose{suffix}")
  save_pose(pose, path)
  back = load_pose(path, library)
  assert back.sequence() == pose.sequence()
  assert len(back) == len(pose)
  assert np.allclose(back.coords, pose.coords, atol=1e-3)


def test_format_inference(pose, tmp_path):
  with pytest.raises(ValueError):
    save_pose(pose, str(tmp_path / "pose.txt"))
  with pytest.raises(ValueError):
    save_pose(pose, str(tmp_path / "pose.pdb"), format="xyz")
  save_pose(pose, str(tmp_path / "pose.txt"), format="pdb")
  assert (tmp_path / "pose.txt").read_text().count("ATOM") == len(pose)


def test_save_to_handle(pose):
  handle = io.StringIO()
  save_pose(pose, handle)
  assert handle.getvalue().count("ATOM") == len(pose)


# -----------------------------
# Trajectory frames
# -----------------------------


def test_pdb_models_can_be_read_back(pose, library):
  handle = io.StringIO()
  write_pdb_model(pose, handle, 1)
  first = pose.coords.copy()
  set_phi(pose, pose.residues()[3], deg_to_rad(-120.0))
  write_pdb_model(pose, handle, 2)
  text = handle.getvalue()
  assert text.startswith("MODEL")
  assert text.count("ENDMDL") == 2
  assert "END\n" not in text.replace("ENDMDL\n", "")

  structure = PDBParser(QUIET=True).get_structure("trajectory", io.StringIO(text))
  assert len(structure) == 2
  assert np.allclose(pose_from_structure(structure, library, model=0).coords, first, atol=1e-3)
  assert np.allclose(pose_from_structure(structure, library, model=1).coords, pose.coords, atol=1e-3)


def test_pdb_frame_writer_numbers_models(pose):
  handle = io.StringIO()
  writer = pdb_frame_writer(handle, frequency=2)
  for step in range(1, 5):
    writer(pose, DriverState(step=step))
  lines = [line for line in handle.getvalue().splitlines() if line.startswith("MODEL")]
  assert [int(line.split()[1]) for line in lines] == [1, 2]
