"""
The pose: one molecular graph plus one dual coordinate state kept in index
alignment. Every read of coordinates made through the pose syncs first.
"""

from typing import Iterable, List, Optional

import numpy as np

from posekit.geometry import wrap_angle
from posekit.graph import Atom, Residue, Topology
from posekit.log import logger
from posekit.state import State, c2i, i2c


### CLASSES ###
class Pose:
  def __init__(self, topology: Topology, state: State):
    """Bundle a molecular graph with its coordinate state.

    Parameters:
      topology: Molecular graph, atom indices must already match ``state`` rows
      state: Dual coordinate state

    Raises:
      StructureIntegrityError: if graph and state are not index aligned
    """
    topology.validate(state.size)
    self.topology = topology
    self.state = state

  def __repr__(self):
    return f"<Pose {self.topology.name} residues={self.topology.count_residues()} atoms={self.state.size} status={self.state.status.value}>"

  def __len__(self):
    return self.state.size

  ## Graph access
  def atoms(self) -> List[Atom]:
    return list(self.topology.atoms())

  def residues(self) -> List[Residue]:
    return list(self.topology.residues())

  def sequence(self) -> str:
    """One letter sequence of every residue in container order."""
    return "".join(residue.code for residue in self.topology.residues())

  ## Synchronisation
  def sync_to_cartesian(self) -> "Pose":
    """Apply a pending internal to cartesian conversion (no-op otherwise)."""
    i2c(self.state, self.topology)
    return self

  def sync_to_internal(self) -> "Pose":
    """Apply a pending cartesian to internal conversion (no-op otherwise)."""
    c2i(self.state, self.topology)
    return self

  def sync(self) -> "Pose":
    """Apply whichever conversion is pending. Calling it twice in a row does
    real work at most once.
    """
    if self.state.needs_i2c:
      self.sync_to_cartesian()
    elif self.state.needs_c2i:
      self.sync_to_internal()
    return self

  def request_i2c(self, atoms: Optional[Iterable[Atom]] = None):
    """Flag internal coordinates of ``atoms`` (all atoms if omitted) as changed."""
    indices = None if atoms is None else [atom.index for atom in atoms]
    self.state.request_i2c(indices)

  def request_c2i(self):
    self.state.request_c2i()

  @property
  def coords(self) -> np.ndarray:
    """Cartesian coordinates, converted from internal coordinates first if needed."""
    return self.sync_to_cartesian().state.coords

  @property
  def internals(self) -> np.ndarray:
    """Internal coordinates, converted from cartesian coordinates first if needed."""
    return self.sync_to_internal().state.internals

  ## Internal coordinate edits
  def get_dihedral(self, atom: Atom) -> float:
    """Dihedral of ``atom`` relative to its three ascendents, in radians."""
    return float(self.internals[atom.index, 2])

  def rotate_dihedral(self, atom: Atom, delta: float):
    """Rotate about the bond between ``atom``'s parent and grandparent.

    Every atom hanging off the same parent turns by the same amount, so the
    branch geometry around the rotated bond stays rigid.

    Parameters:
      atom: Atom defining the dihedral
      delta: Rotation in radians
    """
    self.sync_to_internal()
    if atom.parent is None:
      siblings = [a for a in self.topology.atoms() if a.parent is None]
    else:
      siblings = atom.parent.children
    indices = np.array([a.index for a in siblings], dtype=int)
    phi = wrap_angle(self.state.internals[indices, 2] + delta)
    self.state.set_internals(indices, phi=phi)

  def set_dihedral(self, atom: Atom, value: float):
    """Set the dihedral of ``atom`` to ``value`` (radians), rotating its siblings with it."""
    self.rotate_dihedral(atom, value - self.get_dihedral(atom))

  ## Structural edits
  def reindex(self):
    """Renumber atoms in container order and rebuild the coordinate state to
    match in one step. Call after inserting or removing atoms; inserted atoms
    (index ``-1``) get zeroed rows flagged for i2c.

    Raises:
      StructureIntegrityError: if an atom index is reused or out of range
    """
    atoms = list(self.topology.atoms())
    old = np.array([atom.index for atom in atoms], dtype=int)
    new_state = self.state.reindexed(old)
    for i, atom in enumerate(atoms):
      atom.index = i
    self.state = new_state
    self.topology.validate(self.state.size)
    logger.debug(f"Reindexed pose: {int((old < 0).sum())} inserted, {self.state.size} atoms total")

  ## Snapshots
  def copy(self) -> "Pose":
    """Deep copy of graph and state together."""
    return Pose(self.topology.copy(), self.state.copy())

  def restore(self, snapshot: "Pose"):
    """Revert this pose in place to a snapshot taken with :meth:`copy`.

    Both representations and the sync status come back exactly as they were
    when the snapshot was taken. The snapshot must not be reused afterwards.
    """
    if snapshot is self:
      return
    snapshot.topology.validate(snapshot.state.size)
    self.topology = snapshot.topology
    self.state = snapshot.state
