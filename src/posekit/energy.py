"""
Energy evaluation. An :class:`Evaluator` sums weighted :class:`EnergyComponent`
terms over the cartesian coordinates of a pose. Components are plain
geometric restraints; evaluation never edits the pose beyond applying a
pending i2c on the read path.
"""

import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set, Tuple

import numpy as np
from scipy.spatial import cKDTree

from posekit.graph import Topology
from posekit.pose import Pose

AtomKey = Tuple[str, int, str]


### CLASSES ###
@dataclass
class Energy:
  """Result of one evaluation.

  Attributes:
    total: Weighted sum of every component
    components: Weighted energy per component name
    forces: ``(N, 3)`` negative gradient if requested, else ``None``
  """
  total: float
  components: Dict[str, float] = field(default_factory=dict)
  forces: Optional[np.ndarray] = None

  def __float__(self):
    return float(self.total)


class EnergyComponent(ABC):
  name = "component"

  def __init__(self, lam: float = 1.0):
    """A single energy term.

    Parameters:
      lam: Weight applied to this term by the evaluator
    """
    self.lam = lam

  @abstractmethod
  def calc(self, pose: Pose, coords: np.ndarray, forces: bool = False) -> Tuple[float, Optional[np.ndarray]]:
    """Unweighted energy and, if requested, the ``(N, 3)`` forces."""


class Evaluator:
  def __init__(self, components: List[EnergyComponent]):
    """Weighted sum of energy components.

    Raises:
      ValueError: if two components share a name
    """
    names = [c.name for c in components]
    if len(set(names)) != len(names):
      raise ValueError(f"Energy component names must be unique, got {names}.")
    self.components = list(components)

  def __repr__(self):
    return f"<Evaluator [{', '.join(f'{c.name}*{c.lam}' for c in self.components)}]>"

  def __call__(self, pose: Pose, forces: bool = False) -> Energy:
    """Evaluate the pose.

    Parameters:
      pose: Pose to evaluate, a pending i2c is applied first
      forces: Also compute forces

    Returns:
      Energy with per-component breakdown
    """
    coords = pose.coords
    total = 0.0
    out_forces = np.zeros_like(coords) if forces else None
    components = {}
    for component in self.components:
      e, f = component.calc(pose, coords, forces)
      components[component.name] = component.lam * e
      total += component.lam * e
      if forces:
        out_forces += component.lam * f
    return Energy(total, components, out_forces)


class DistanceRestraint(EnergyComponent):
  name = "distance"

  def __init__(self, pairs: List[Tuple[AtomKey, AtomKey, float]], k: float = 10.0, lam: float = 1.0, name: str = None):
    """Harmonic restraints ``k * (d - d0)**2`` between atom pairs.

    Parameters:
      pairs: ``(key_a, key_b, d0)`` triples, atoms identified by
        ``(segment, residue id, atom name)``
      k: Force constant
      lam: Component weight
      name: Component name
    """
    super().__init__(lam)
    self.pairs = list(pairs)
    self.k = k
    if name is not None:
      self.name = name

  def _resolve(self, topology: Topology) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    # pairs whose atoms were removed (e.g. by a mutation) are skipped
    lookup = topology.atom_key_map()
    idx_a, idx_b, d0 = [], [], []
    for key_a, key_b, target in self.pairs:
      if key_a not in lookup or key_b not in lookup:
        continue
      idx_a.append(lookup[key_a].index)
      idx_b.append(lookup[key_b].index)
      d0.append(target)
    return np.array(idx_a, dtype=int), np.array(idx_b, dtype=int), np.array(d0, dtype=float)

  def calc(self, pose: Pose, coords: np.ndarray, forces: bool = False) -> Tuple[float, Optional[np.ndarray]]:
    a, b, d0 = self._resolve(pose.topology)
    return _harmonic(coords, a, b, d0, self.k, forces)


class BondRestraint(DistanceRestraint):
  name = "bonds"

  @classmethod
  def from_pose(cls, pose: Pose, k: float = 100.0, lam: float = 1.0) -> "BondRestraint":
    """Restrain every covalent bond of ``pose`` to its current length.

    Atoms are stored by ``(segment, residue id, atom name)`` so the
    restraint survives reindexing, snapshots and reverts.
    """
    coords = pose.coords
    pairs = []
    for segment in pose.topology.segments():
      for residue in segment:
        for atom in residue:
          for other in atom.bonds:
            if other.index <= atom.index:
              continue
            key_a = (segment.name, residue.id, atom.name)
            key_b = (other.container.container.name, other.container.id, other.name)
            pairs.append((key_a, key_b, float(np.linalg.norm(coords[atom.index] - coords[other.index]))))
    return cls(pairs, k=k, lam=lam)


class ClashRestraint(EnergyComponent):
  name = "clash"

  def __init__(self, cutoff: float = 3.0, k: float = 10.0, lam: float = 1.0):
    """Soft repulsion ``k * (cutoff - d)**2`` between atoms closer than
    ``cutoff``. Bonded atoms and atoms sharing a bonded neighbour are excluded.
    """
    super().__init__(lam)
    self.cutoff = cutoff
    self.k = k

  @staticmethod
  def exclusions(topology: Topology) -> Set[Tuple[int, int]]:
    """Index pairs ``(i, j)`` with ``i < j`` separated by one or two bonds."""
    out = set()
    for atom in topology.atoms():
      for other in atom.bonds:
        out.add((min(atom.index, other.index), max(atom.index, other.index)))
      for x, y in itertools.combinations(atom.bonds, 2):
        out.add((min(x.index, y.index), max(x.index, y.index)))
    return out

  def calc(self, pose: Pose, coords: np.ndarray, forces: bool = False) -> Tuple[float, Optional[np.ndarray]]:
    out = np.zeros_like(coords) if forces else None
    if len(coords) < 2:
      return 0.0, out
    pairs = cKDTree(coords).query_pairs(self.cutoff, output_type="ndarray")
    excluded = self.exclusions(pose.topology)
    keep = [k for k, (i, j) in enumerate(pairs) if (i, j) not in excluded]
    if not keep:
      return 0.0, out
    pairs = pairs[keep]
    delta = coords[pairs[:, 0]] - coords[pairs[:, 1]]
    d = np.linalg.norm(delta, axis=1)
    overlap = self.cutoff - d
    energy = float(self.k * np.sum(overlap**2))
    if forces:
      # push apart along the pair vector, coincident atoms get no direction
      with np.errstate(invalid="ignore", divide="ignore"):
        unit = np.where(d[:, None] > 0, delta / d[:, None], 0.0)
      f = (2 * self.k * overlap)[:, None] * unit
      np.add.at(out, pairs[:, 0], f)
      np.add.at(out, pairs[:, 1], -f)
    return energy, out


### FUNCTIONS ###
def _harmonic(coords: np.ndarray, a: np.ndarray, b: np.ndarray, d0: np.ndarray, k: float, forces: bool) -> Tuple[float, Optional[np.ndarray]]:
  out = np.zeros_like(coords) if forces else None
  if not len(a):
    return 0.0, out
  delta = coords[a] - coords[b]
  d = np.linalg.norm(delta, axis=1)
  energy = float(k * np.sum((d - d0) ** 2))
  if forces:
    with np.errstate(invalid="ignore", divide="ignore"):
      unit = np.where(d[:, None] > 0, delta / d[:, None], 0.0)
    f = (-2 * k * (d - d0))[:, None] * unit
    np.add.at(out, a, f)
    np.add.at(out, b, -f)
  return energy, out
