"""
Dual coordinate state of a pose: cartesian positions and internal coordinates
(bond length, bond angle, dihedral relative to the internal coordinate tree)
kept in index alignment with the molecular graph.

Only one representation may carry unsynced writes at a time. The state tracks
this with an explicit :class:`SyncStatus` that only the write methods and the
two conversions (:func:`i2c`, :func:`c2i`) can change, so a stale array can
never be read by accident.
"""

from enum import Enum
from typing import Iterable, Optional, Union

import numpy as np

from posekit.constants import ORIGIN_FRAME, ROOT_FRAME
from posekit.errors import StaleStateError, StructureIntegrityError
from posekit.geometry import angles, dihedrals, distances, place_atom
from posekit.graph import Topology
from posekit.log import logger

Indices = Optional[Union[int, Iterable[int], np.ndarray]]


### CLASSES ###
class SyncStatus(Enum):
  BOTH_VALID = "both_valid"
  CARTESIAN_VALID = "cartesian_valid"  # internals are stale, c2i pending
  INTERNAL_VALID = "internal_valid"  # cartesian is stale, i2c pending
  BOTH_STALE = "both_stale"  # freshly allocated, nothing written yet


class State:
  def __init__(self, n_atoms: int = 0):
    """Parallel coordinate arrays for ``n_atoms`` atoms.

    A new state holds no valid data (:attr:`SyncStatus.BOTH_STALE`). Use
    :meth:`from_cartesian` or :meth:`from_internals` to create a usable one.

    Parameters:
      n_atoms: Number of rows (atoms)
    """
    self._coords = np.zeros((n_atoms, 3), dtype=float)
    self._internals = np.zeros((n_atoms, 3), dtype=float)
    self._changed = np.zeros(n_atoms, dtype=bool)
    self.status = SyncStatus.BOTH_STALE
    self.i2c_count = 0
    self.c2i_count = 0

  def __repr__(self):
    return f"<State atoms={self.size} status={self.status.value}>"

  def __len__(self):
    return self.size

  @classmethod
  def from_cartesian(cls, coords: np.ndarray) -> "State":
    """Create a state whose cartesian coordinates are authoritative (c2i pending)."""
    coords = np.asarray(coords, dtype=float)
    if coords.ndim != 2 or coords.shape[1] != 3:
      raise ValueError(f"Cartesian coordinates must have shape (N, 3), got {coords.shape}.")
    state = cls(len(coords))
    state._coords[:] = coords
    state.status = SyncStatus.CARTESIAN_VALID
    return state

  @classmethod
  def from_internals(cls, internals: np.ndarray) -> "State":
    """Create a state whose internal coordinates are authoritative (i2c pending for every atom).

    Parameters:
      internals: ``(N, 3)`` array of bond length (Angstrom), angle and dihedral (radians)
    """
    internals = np.asarray(internals, dtype=float)
    if internals.ndim != 2 or internals.shape[1] != 3:
      raise ValueError(f"Internal coordinates must have shape (N, 3), got {internals.shape}.")
    state = cls(len(internals))
    state._internals[:] = internals
    state._changed[:] = True
    state.status = SyncStatus.INTERNAL_VALID
    return state

  @property
  def size(self) -> int:
    return len(self._coords)

  @property
  def needs_i2c(self) -> bool:
    """Internal coordinates changed and cartesian coordinates are stale."""
    return self.status == SyncStatus.INTERNAL_VALID

  @property
  def needs_c2i(self) -> bool:
    """Cartesian coordinates changed and internal coordinates are stale."""
    return self.status == SyncStatus.CARTESIAN_VALID

  @property
  def cartesian_valid(self) -> bool:
    return self.status in (SyncStatus.BOTH_VALID, SyncStatus.CARTESIAN_VALID)

  @property
  def internals_valid(self) -> bool:
    return self.status in (SyncStatus.BOTH_VALID, SyncStatus.INTERNAL_VALID)

  @property
  def pending(self) -> np.ndarray:
    """Indices of atoms whose internal coordinates changed since the last i2c."""
    return np.flatnonzero(self._changed)

  @property
  def coords(self) -> np.ndarray:
    """Read-only view of the cartesian coordinates.

    Raises:
      StaleStateError: if an internal to cartesian conversion is pending
    """
    if not self.cartesian_valid:
      raise StaleStateError(f"Cartesian coordinates are stale (status: {self.status.value}), sync the pose first.")
    view = self._coords.view()
    view.flags.writeable = False
    return view

  @property
  def internals(self) -> np.ndarray:
    """Read-only view of the internal coordinates (columns: b, theta, phi).

    Raises:
      StaleStateError: if a cartesian to internal conversion is pending
    """
    if not self.internals_valid:
      raise StaleStateError(f"Internal coordinates are stale (status: {self.status.value}), sync the pose first.")
    view = self._internals.view()
    view.flags.writeable = False
    return view

  def set_coords(self, values: np.ndarray, indices: Indices = None):
    """Overwrite cartesian coordinates and mark internals as stale.

    Parameters:
      values: New positions, shape ``(len(indices), 3)`` or ``(N, 3)``
      indices: Rows to overwrite, all rows if not provided

    Raises:
      StaleStateError: if the cartesian coordinates are currently stale
    """
    if not self.cartesian_valid:
      raise StaleStateError(f"Cannot write cartesian coordinates while they are stale (status: {self.status.value}).")
    rows = slice(None) if indices is None else np.atleast_1d(np.asarray(indices, dtype=int))
    self._coords[rows] = values
    self.status = SyncStatus.CARTESIAN_VALID

  def set_internals(
    self,
    indices: Indices,
    bond: Optional[Union[float, np.ndarray]] = None,
    theta: Optional[Union[float, np.ndarray]] = None,
    phi: Optional[Union[float, np.ndarray]] = None,
  ):
    """Overwrite internal coordinates of some atoms and request an i2c for them.

    Parameters:
      indices: Rows to overwrite
      bond: New bond length(s) in Angstrom
      theta: New bond angle(s) in radians
      phi: New dihedral(s) in radians

    Raises:
      StaleStateError: if the internal coordinates are currently stale
    """
    if not self.internals_valid:
      raise StaleStateError(f"Cannot write internal coordinates while they are stale (status: {self.status.value}).")
    rows = np.atleast_1d(np.asarray(indices, dtype=int))
    for column, value in enumerate((bond, theta, phi)):
      if value is not None:
        self._internals[rows, column] = value
    self._changed[rows] = True
    self.status = SyncStatus.INTERNAL_VALID

  def request_i2c(self, indices: Indices = None):
    """Flag internal coordinates as changed so the next read of cartesian
    coordinates recomputes them. Without indices every atom is flagged.

    Raises:
      StaleStateError: if cartesian coordinates carry unsynced writes
    """
    if not self.internals_valid:
      raise StaleStateError(f"Cannot request i2c, internal coordinates are stale (status: {self.status.value}).")
    if indices is None:
      self._changed[:] = True
    else:
      self._changed[np.atleast_1d(np.asarray(indices, dtype=int))] = True
    self.status = SyncStatus.INTERNAL_VALID

  def request_c2i(self):
    """Flag cartesian coordinates as changed so the next read of internal
    coordinates recomputes them.

    Raises:
      StaleStateError: if internal coordinates carry unsynced writes
    """
    if not self.cartesian_valid:
      raise StaleStateError(f"Cannot request c2i, cartesian coordinates are stale (status: {self.status.value}).")
    self.status = SyncStatus.CARTESIAN_VALID

  def reindexed(self, old_indices: np.ndarray) -> "State":
    """Return a new state aligned to a new atom ordering.

    Parameters:
      old_indices: For every row of the new state, the row it came from in
        this state, or ``-1`` for a newly inserted atom. Rows of this state
        that are not referenced are dropped.

    Returns:
      New state. Inserted rows are zeroed and flagged for i2c, their internal
      coordinates must be written by the caller.

    Raises:
      StructureIntegrityError: if ``old_indices`` references rows twice or out of range
      StaleStateError: if atoms are inserted while internal coordinates are stale
    """
    old = np.asarray(old_indices, dtype=int)
    kept = old[old >= 0]
    if len(np.unique(kept)) != len(kept) or (len(kept) and kept.max() >= self.size):
      raise StructureIntegrityError("Reindexing references coordinate rows twice or out of range.")
    inserted = old < 0
    if inserted.any() and not self.internals_valid:
      raise StaleStateError("Cannot insert atoms while internal coordinates are stale, sync to internal first.")

    state = State(len(old))
    state._coords[~inserted] = self._coords[kept]
    state._internals[~inserted] = self._internals[kept]
    state._changed[~inserted] = self._changed[kept]
    state._changed[inserted] = True
    state.status = SyncStatus.INTERNAL_VALID if inserted.any() else self.status
    state.i2c_count = self.i2c_count
    state.c2i_count = self.c2i_count
    return state

  def copy(self) -> "State":
    state = State(0)
    state._coords = self._coords.copy()
    state._internals = self._internals.copy()
    state._changed = self._changed.copy()
    state.status = self.status
    state.i2c_count = self.i2c_count
    state.c2i_count = self.c2i_count
    return state


### FUNCTIONS ###
def _anchor(asc) -> int:
  """Topmost real ascendent, the root the virtual frame hangs from, or -1 for roots."""
  for index in reversed(asc):
    if index >= 0:
      return index
  return -1


def _position(coords: np.ndarray, index: int, anchor: int) -> np.ndarray:
  if index >= 0:
    return coords[index]
  if anchor < 0:
    return ORIGIN_FRAME[-index - 1]
  return coords[anchor] + ROOT_FRAME[-index - 1]


def i2c(state: State, topology: Topology) -> State:
  """Recompute cartesian coordinates from internal coordinates.

  Only atoms whose internal coordinates changed, plus everything below them
  in the internal coordinate tree, are recomputed. Atoms are visited parent
  first since each position depends on its three ascendents. Does nothing if
  no i2c is pending.

  Parameters:
    state: Coordinate state to update in place
    topology: Molecular graph aligned with ``state``

  Returns:
    The same state, now :attr:`SyncStatus.BOTH_VALID`

  Raises:
    StructureIntegrityError: if the graph is corrupted or misaligned
    StaleStateError: if neither representation holds valid data
  """
  if state.status == SyncStatus.BOTH_STALE:
    raise StaleStateError("Cannot run i2c, the state holds no valid coordinates.")
  if not state.needs_i2c:
    return state

  topology.validate(state.size)
  order = topology.traverse()
  recompute = state._changed.copy()
  coords = state._coords
  for atom in order:
    i = atom.index
    p, g, gg = topology.ascendents(atom)
    if not recompute[i]:
      if p < 0 or not recompute[p]:
        continue
      recompute[i] = True
    b, theta, phi = state._internals[i]
    anchor = _anchor((p, g, gg))
    coords[i] = place_atom(_position(coords, gg, anchor), _position(coords, g, anchor), _position(coords, p, anchor), b, theta, phi)

  state._changed[:] = False
  state.status = SyncStatus.BOTH_VALID
  state.i2c_count += 1
  logger.debug(f"i2c recomputed {int(recompute.sum())}/{state.size} atoms")
  return state


def c2i(state: State, topology: Topology) -> State:
  """Recompute every internal coordinate from cartesian coordinates.

  Each atom only depends on its own fixed ascendents, so the whole array is
  computed in one vectorised pass. Does nothing if no c2i is pending.

  Parameters:
    state: Coordinate state to update in place
    topology: Molecular graph aligned with ``state``

  Returns:
    The same state, now :attr:`SyncStatus.BOTH_VALID`

  Raises:
    StructureIntegrityError: if the graph is corrupted or misaligned
    StaleStateError: if neither representation holds valid data
  """
  if state.status == SyncStatus.BOTH_STALE:
    raise StaleStateError("Cannot run c2i, the state holds no valid coordinates.")
  if not state.needs_c2i:
    return state

  topology.validate(state.size)
  topology.traverse()
  n = state.size
  if n:
    asc = np.array([topology.ascendents(atom) for atom in topology.atoms()], dtype=int)
    rows = np.where(asc < 0, n - asc - 1, asc)
    d = state._coords
    points = np.vstack([d, ORIGIN_FRAME])[rows]
    # virtual ascendents of non-root atoms follow their root
    anchor = np.where(asc[:, 2] >= 0, asc[:, 2], np.where(asc[:, 1] >= 0, asc[:, 1], asc[:, 0]))
    below = (asc < 0) & (anchor >= 0)[:, None]
    shifted = d[np.maximum(anchor, 0)][:, None, :] + ROOT_FRAME[np.clip(-asc - 1, 0, 1)]
    points = np.where(below[:, :, None], shifted, points)
    c = points[:, 0]
    b = points[:, 1]
    a = points[:, 2]
    state._internals[:, 0] = distances(c, d)
    state._internals[:, 1] = angles(b, c, d)
    state._internals[:, 2] = dihedrals(a, b, c, d)

  state._changed[:] = False
  state.status = SyncStatus.BOTH_VALID
  state.c2i_count += 1
  logger.debug(f"c2i recomputed {n} atoms")
  return state
