"""
Bridge between poses and Biopython ``Bio.PDB`` structures, used to load
poses from PDB/mmCIF files and to write frames.
"""

from typing import IO, Dict, Optional, Union

import numpy as np
from Bio.PDB import PDBIO, MMCIFParser, PDBParser
from Bio.PDB.mmcifio import MMCIFIO
from Bio.PDB.Structure import Structure
from Bio.PDB.StructureBuilder import StructureBuilder

from posekit.graph import Atom, Residue, Segment, Topology
from posekit.log import logger
from posekit.pose import Pose
from posekit.state import State
from posekit.templates import LINK_PARENT, ResidueLibrary

# Longest C-N distance (Angstrom) still treated as a peptide bond
PEPTIDE_BOND_CUTOFF = 2.0


### FUNCTIONS ###
def _infer_format(path: str, format: str) -> str:
  if format != "auto":
    if format not in ("pdb", "mmcif"):
      raise ValueError("Format must be 'pdb' or 'mmcif'.")
    return format
  if str(path).lower().endswith(".pdb"):
    return "pdb"
  if str(path).lower().endswith(".cif") or str(path).lower().endswith(".mmcif"):
    return "mmcif"
  raise ValueError("Failed to infer format. Please specify format explicitly as 'pdb' or 'mmcif'.")


def pose_from_structure(structure: Structure, library: ResidueLibrary, model: int = 0, name: Optional[str] = None) -> Pose:
  """Create a pose from a parsed structure.

  Residues are matched to library templates by name; only heavy atoms the
  template knows are kept and the template defines the internal coordinate
  tree. Consecutive residues are linked through their peptide bond unless the
  chain is broken, in which case the N atom becomes a root. Internal
  coordinates are computed right away.

  Parameters:
    structure: Parsed ``Bio.PDB`` structure
    library: Residue templates
    model: Index of the model to use
    name: Topology name, defaults to the structure id

  Returns:
    New pose with both representations valid

  Raises:
    ValueError: if the model holds no residue the library knows
  """
  models = list(structure)
  if not 0 <= model < len(models):
    raise ValueError(f"Structure has {len(models)} model(s), model {model} requested.")
  topology = Topology(name or str(structure.id))
  coords = []
  skipped: Dict[str, int] = {}
  for chain in models[model]:
    segment = Segment(chain.id)
    for bio_res in chain:
      if bio_res.id[0] != " " or bio_res.resname not in library.templates:
        skipped[bio_res.resname] = skipped.get(bio_res.resname, 0) + 1
        continue
      template = library.lookup(bio_res.resname)
      residue = Residue(template.name, bio_res.id[1])
      prev = segment.items[-1] if segment.items else None
      segment.add(residue)
      for template_atom in template.atoms:
        if template_atom.name not in bio_res:
          continue
        if template_atom.parent is None:
          parent = None
        elif template_atom.parent == LINK_PARENT:
          parent = prev.get("C") if prev is not None else None
          if parent is not None:
            gap = np.linalg.norm(coords[parent.index] - bio_res[template_atom.name].coord)
            if gap > PEPTIDE_BOND_CUTOFF:
              logger.warning(f"Chain break before {chain.id}:{residue.name}-{residue.id} ({gap:.2f} A), starting a new root")
              parent = None
        else:
          parent = residue.get(template_atom.parent)
          if parent is None:
            logger.warning(f"Skipping {chain.id}:{residue.name}-{residue.id} {template_atom.name}, its parent {template_atom.parent} is missing")
            continue
        atom = Atom(template_atom.name, template_atom.element, len(coords))
        residue.add(atom)
        Topology.set_parent(atom, parent)
        if parent is not None:
          Topology.bond(atom, parent)
        coords.append(np.asarray(bio_res[template_atom.name].coord, dtype=float))
      for a, b in template.bonds:
        if a in residue and b in residue:
          Topology.bond(residue[a], residue[b])
    if segment.items:
      topology.add(segment)

  if skipped:
    logger.debug(f"Skipped residues not in the library: {skipped}")
  if not coords:
    raise ValueError("Structure holds no residues with a matching template.")
  pose = Pose(topology, State.from_cartesian(np.array(coords)))
  return pose.sync_to_internal()


def pose_to_structure(pose: Pose, structure_id: Optional[str] = None) -> Structure:
  """Build a ``Bio.PDB`` structure from the pose's cartesian coordinates (synced first)."""
  coords = pose.coords
  builder = StructureBuilder()
  builder.init_structure(structure_id or pose.topology.name)
  builder.init_model(0)
  builder.init_seg("    ")
  serial = 1
  for segment in pose.topology.segments():
    builder.init_chain(segment.name)
    for residue in segment:
      builder.init_residue(residue.name, " ", residue.id, " ")
      for atom in residue:
        fullname = atom.name if len(atom.name) == 4 else f" {atom.name:<3}"
        builder.init_atom(atom.name, np.array(coords[atom.index], dtype="f"), 0.0, 1.0, " ", fullname, serial, element=atom.element or None)
        serial += 1
  return builder.get_structure()


def load_pose(path: str, library: ResidueLibrary, format: str = "auto", model: int = 0) -> Pose:
  """Load a pose from a PDB or mmCIF file.

  Parameters:
    path: Input file path
    library: Residue templates
    format: ``"pdb"``, ``"mmcif"`` or ``"auto"`` to infer it from the extension
    model: Index of the model to use

  Returns:
    New pose
  """
  format = _infer_format(path, format)
  parser = PDBParser(QUIET=True) if format == "pdb" else MMCIFParser(QUIET=True)
  structure = parser.get_structure("structure", path)
  assert len(structure), "No models found. Structure appears to be empty."
  return pose_from_structure(structure, library, model=model)


def save_pose(pose: Pose, fpath: Union[str, IO], format: str = "auto"):
  """Write a pose to a PDB or mmCIF file.

  Parameters:
    pose: Pose to write, synced first
    fpath: Output path or open text handle (handles need an explicit format)
    format: ``"pdb"``, ``"mmcif"`` or ``"auto"`` to infer it from the extension
  """
  if not isinstance(fpath, str) and format == "auto":
    format = "pdb"
  format = _infer_format(fpath, format)
  structure = pose_to_structure(pose)
  if format == "pdb":
    io = PDBIO()
    io.set_structure(structure)
    io.save(fpath, preserve_atom_numbering=True)
  else:
    mmcif_io = MMCIFIO()
    mmcif_io.set_structure(structure)
    mmcif_io.save(fpath)


def write_pdb_model(pose: Pose, handle: IO, model_id: int):
  """Append one ``MODEL``/``ENDMDL`` block to an open PDB text handle."""
  io = PDBIO()
  io.set_structure(pose_to_structure(pose))
  handle.write(f"MODEL     {model_id:>4}\n")
  io.save(handle, write_end=False, preserve_atom_numbering=True)
  handle.write("ENDMDL\n")
