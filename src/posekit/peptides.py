"""
Peptide specific structure operations: building a pose from a sequence,
point mutations that splice a new side chain from a residue template,
backbone dihedral access and secondary structure helpers.
"""

import math
from typing import Dict, List, Optional, Tuple

import numpy as np

from posekit.constants import BACKBONE_ATOMS_PEPTIDE, SS_BLOCK_CODES, SS_DIHEDRALS
from posekit.errors import StructureIntegrityError
from posekit.geometry import deg_to_rad, wrap_angle
from posekit.graph import Atom, Residue, Segment, Topology
from posekit.log import logger
from posekit.pose import Pose
from posekit.state import State
from posekit.templates import LINK_PARENT, ResidueLibrary, ResidueTemplate, TemplateAtom


### FUNCTIONS ###
def _link_atom(residue: Residue) -> Optional[Atom]:
  """Atom of the previous residue that ``LINK_PARENT`` refers to."""
  if residue.prev is None:
    return None
  return residue.prev.get("C")


def _resolve_parent(residue: Residue, template_atom: TemplateAtom) -> Optional[Atom]:
  if template_atom.parent is None:
    return None
  if template_atom.parent == LINK_PARENT:
    return _link_atom(residue)
  return residue[template_atom.parent]


def build_peptide(library: ResidueLibrary, sequence: str, segment: str = "A", first_id: int = 1, name: Optional[str] = None) -> Pose:
  """Build a single chain peptide in internal coordinates from residue templates.

  The pose is returned with an i2c pending for every atom, cartesian
  coordinates are computed on first read.

  Parameters:
    library: Residue templates
    sequence: One letter (or space separated three letter) sequence
    segment: Name of the created segment
    first_id: Residue number of the first residue
    name: Topology name, defaults to the sequence

  Returns:
    New pose

  Raises:
    ValueError: if the sequence is empty or holds an unknown residue
  """
  codes = sequence.split() if " " in sequence.strip() else list(sequence.strip())
  if not codes:
    raise ValueError("Cannot build a peptide from an empty sequence.")
  templates = [library.lookup(code) for code in codes]

  topology = Topology(name or "".join(t.code for t in templates))
  seg = Segment(segment)
  topology.add(seg)
  rows: List[Tuple[float, float, float]] = []
  for offset, template in enumerate(templates):
    residue = Residue(template.name, first_id + offset)
    seg.add(residue)
    for template_atom in template.atoms:
      atom = Atom(template_atom.name, template_atom.element)
      residue.add(atom)
      parent = _resolve_parent(residue, template_atom)
      Topology.set_parent(atom, parent)
      if parent is not None:
        Topology.bond(atom, parent)
      rows.append((template_atom.b, template_atom.theta, template_atom.phi))
    for a, b in template.bonds:
      Topology.bond(residue[a], residue[b])

  for i, atom in enumerate(topology.atoms()):
    atom.index = i
  pose = Pose(topology, State.from_internals(np.array(rows, dtype=float)))
  logger.debug(f"Built peptide {topology.name} with {len(pose)} atoms")
  return pose


def mutate(pose: Pose, residue: Residue, library: ResidueLibrary, code: str):
  """Change the identity of ``residue`` by splicing in the side chain of another
  residue template.

  Backbone atoms (N, CA, C, O) keep their internal coordinates. Every other
  atom of the residue is removed and the template's remaining atoms are
  inserted. A new side chain root is placed relative to a kept sibling (e.g.
  CB relative to C around the CA-N bond) so it follows the current backbone.
  Internal coordinates are synced first, afterwards only an i2c is requested
  and cartesian coordinates are left stale.

  Parameters:
    pose: Pose to edit in place
    residue: Residue of ``pose`` to mutate
    library: Residue templates
    code: One or three letter code of the new residue type

  Raises:
    ValueError: if ``code`` is not in the library
    StructureIntegrityError: if atoms outside the side chain hang off it
  """
  template = library.lookup(code)
  topology = pose.topology
  pose.sync_to_internal()

  kept_names = BACKBONE_ATOMS_PEPTIDE.intersection(template.atom_names())
  removed = [atom for atom in residue.items if atom.name not in kept_names]
  removed_ids = set(map(id, removed))
  for atom in removed:
    for child in atom.children:
      if id(child) not in removed_ids:
        raise StructureIntegrityError(f"Cannot mutate {residue}, {child} still hangs off {atom}.")

  for atom in removed:
    Topology.set_parent(atom, None)
  for atom in removed:
    topology.detach(atom)

  kept: Dict[str, Atom] = {atom.name: atom for atom in residue.items}
  inserted: List[Tuple[Atom, TemplateAtom]] = []
  residue.items = []
  for template_atom in template.atoms:
    atom = kept.get(template_atom.name)
    if atom is None:
      atom = Atom(template_atom.name, template_atom.element)
      residue.add(atom)
      parent = _resolve_parent(residue, template_atom)
      Topology.set_parent(atom, parent)
      if parent is not None:
        Topology.bond(atom, parent)
      inserted.append((atom, template_atom))
    else:
      residue.add(atom)
  inserted_ids = set(id(atom) for atom, _ in inserted)
  for a, b in template.bonds:
    if id(residue[a]) in inserted_ids or id(residue[b]) in inserted_ids:
      Topology.bond(residue[a], residue[b])

  pose.reindex()
  internals = pose.state.internals
  for atom, template_atom in inserted:
    phi = template_atom.phi
    reference = _kept_sibling(template, template_atom, kept)
    if reference is not None:
      ref_atom, ref_template_atom = reference
      phi = template_atom.phi - ref_template_atom.phi + internals[ref_atom.index, 2]
    pose.state.set_internals(atom.index, bond=template_atom.b, theta=template_atom.theta, phi=wrap_angle(phi))
  # removals alone would leave the cartesian side valid, flag the residue anyway
  pose.request_i2c(residue.items)

  logger.debug(f"Mutated {residue.name}-{residue.id} to {template.name}")
  residue.name = template.name


def _kept_sibling(template: ResidueTemplate, template_atom: TemplateAtom, kept: Dict[str, Atom]) -> Optional[Tuple[Atom, TemplateAtom]]:
  """First kept atom sharing ``template_atom``'s parent, used as dihedral reference."""
  for sibling in template.children_of(template_atom.parent):
    if sibling.name != template_atom.name and sibling.name in kept:
      return kept[sibling.name], sibling
  return None


## Backbone dihedrals
def get_phi(pose: Pose, residue: Residue) -> Optional[float]:
  """Backbone phi (C(i-1)-N-CA-C) in radians, ``None`` for a chain start."""
  if residue.prev is None:
    return None
  return pose.get_dihedral(residue["C"])


def get_psi(pose: Pose, residue: Residue) -> float:
  """Backbone psi (N-CA-C-N(i+1)) in radians. Chain ends use the carbonyl O."""
  if residue.next is not None:
    return pose.get_dihedral(residue.next["N"])
  return wrap_angle(pose.get_dihedral(residue["O"]) + math.pi)


def get_omega(pose: Pose, residue: Residue) -> Optional[float]:
  """Peptide bond dihedral (CA-C-N(i+1)-CA(i+1)) in radians, ``None`` for a chain end."""
  if residue.next is None:
    return None
  return pose.get_dihedral(residue.next["CA"])


def set_phi(pose: Pose, residue: Residue, value: float):
  """Set phi (radians). Ignored for the first residue of a chain."""
  if residue.prev is None:
    return
  pose.set_dihedral(residue["C"], value)


def set_psi(pose: Pose, residue: Residue, value: float):
  """Set psi (radians); the carbonyl O turns with it."""
  if residue.next is not None:
    pose.set_dihedral(residue.next["N"], value)
  else:
    pose.set_dihedral(residue["O"], wrap_angle(value - math.pi))


def set_omega(pose: Pose, residue: Residue, value: float):
  """Set omega (radians). Ignored for the last residue of a chain."""
  if residue.next is None:
    return
  pose.set_dihedral(residue.next["CA"], value)


## Secondary structure
def apply_ss(pose: Pose, ss: str):
  """Apply ideal backbone dihedrals for a secondary structure string.

  Residues marked ``H`` (helix), ``E`` (strand) or ``C`` (extended coil) get
  the preset phi, psi and omega from :data:`posekit.constants.SS_DIHEDRALS`;
  any other code (e.g. ``-``) leaves the residue untouched.

  Parameters:
    pose: Pose to edit, an i2c is requested
    ss: One character per residue

  Raises:
    ValueError: if the string length does not match the residue count
  """
  residues = pose.residues()
  if len(ss) != len(residues):
    raise ValueError(f"Secondary structure has {len(ss)} characters but the pose has {len(residues)} residues.")
  for residue, code in zip(residues, ss.upper()):
    if code not in SS_DIHEDRALS:
      continue
    phi, psi, omega = (deg_to_rad(v) for v in SS_DIHEDRALS[code])
    set_phi(pose, residue, phi)
    set_psi(pose, residue, psi)
    set_omega(pose, residue, omega)


def blocks_from_ss(pose: Pose, ss: str, min_length: int = 2) -> List[Tuple[int, int]]:
  """Find contiguous secondary structure blocks.

  Parameters:
    pose: Pose the string describes
    ss: One character per residue
    min_length: Shortest run kept as a block

  Returns:
    ``(first, last)`` inclusive residue positions (0-based, container order) of
    every run of identical ``H`` or ``E`` codes

  Raises:
    ValueError: if the string length does not match the residue count
  """
  n = pose.topology.count_residues()
  if len(ss) != n:
    raise ValueError(f"Secondary structure has {len(ss)} characters but the pose has {n} residues.")
  blocks = []
  start = 0
  ss = ss.upper()
  for i in range(1, n + 1):
    if i == n or ss[i] != ss[start]:
      if ss[start] in SS_BLOCK_CODES and i - start >= min_length:
        blocks.append((start, i - 1))
      start = i
  return blocks
