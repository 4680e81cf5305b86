"""
Stochastic structural edits. A mutator is called with a pose (and optionally
an explicit atom list), edits the pose in place and reports what it did as a
:class:`MutationOutcome`. Mutators never sync the representation they wrote
to, the next reader does.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
from scipy.spatial.transform import Rotation

from posekit.constants import AVAILABLE_AMINOACIDS
from posekit.drivers import DriverStatus
from posekit.graph import Atom, Residue
from posekit.log import logger
from posekit.peptides import mutate
from posekit.pose import Pose
from posekit.rotamers import RotamerLibrary
from posekit.selections import Selection
from posekit.templates import ResidueLibrary

AngleSampler = Callable[[np.random.Generator], float]


### CLASSES ###
@dataclass
class MutationOutcome:
  """Result of a mutator call.

  Attributes:
    n_mutations: Number of edits applied
    failed: True if the move could not be completed (the pose was restored)
    message: Reason for a failure
  """
  n_mutations: int = 0
  failed: bool = False
  message: str = ""

  def merge(self, other: "MutationOutcome") -> "MutationOutcome":
    message = "; ".join(m for m in (self.message, other.message) if m)
    return MutationOutcome(self.n_mutations + other.n_mutations, self.failed or other.failed, message)


class Mutator(ABC):
  def __init__(self, p_mut: float = 1.0, selection: Optional[Selection] = None, rng=None):
    """Base of all mutators.

    Parameters:
      p_mut: Probability of editing each candidate
      selection: Restricts the default candidates, all atoms if not provided
      rng: ``numpy.random.Generator``, seed or ``None``

    Raises:
      ValueError: if ``p_mut`` is outside ``[0, 1]``
    """
    if not 0.0 <= p_mut <= 1.0:
      raise ValueError(f"p_mut must lie within [0, 1], got {p_mut}.")
    self.p_mut = p_mut
    self.selection = selection
    self.rng = np.random.default_rng(rng)

  def __repr__(self):
    return f"<{self.__class__.__name__} p_mut={self.p_mut}>"

  def candidates(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> List[Atom]:
    """Atoms considered for mutation, in index order."""
    if atoms is not None:
      return sorted(atoms, key=lambda atom: atom.index)
    if self.selection is None:
      return pose.atoms()
    return self.selection.promote(Atom)(pose, gather=True)

  @staticmethod
  def residues_of(atoms: Iterable[Atom]) -> List[Residue]:
    """Owning residues of ``atoms``, each once, in first-seen order."""
    seen = {}
    for atom in atoms:
      if atom.container is not None:
        seen.setdefault(id(atom.container), atom.container)
    return list(seen.values())

  @abstractmethod
  def __call__(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> MutationOutcome:
    """Edit ``pose`` in place."""


class DesignMutator(Mutator):
  def __init__(
    self,
    p_mut: float,
    library: ResidueLibrary,
    selection: Optional[Selection] = None,
    searchable_aminoacids: Optional[Dict[str, bool]] = None,
    rng=None,
  ):
    """Point mutations of residue identity.

    Every candidate atom draws once; a draw below ``p_mut`` schedules its
    residue for mutation (at most once per call). The new type is drawn
    uniformly from the allowed types other than the current one.

    Parameters:
      p_mut: Per atom mutation probability
      library: Templates supplying the replacement residues
      selection: Restricts the default candidates
      searchable_aminoacids: One letter code to allowed flag, copied on
        construction. Defaults to every standard amino acid.
      rng: ``numpy.random.Generator``, seed or ``None``

    Raises:
      ValueError: if no type is allowed or an allowed type has no template
    """
    super().__init__(p_mut, selection, rng)
    self.library = library
    self.searchable_aminoacids = dict(AVAILABLE_AMINOACIDS if searchable_aminoacids is None else searchable_aminoacids)
    enabled = [code for code, flag in self.searchable_aminoacids.items() if flag]
    if not enabled:
      raise ValueError("DesignMutator needs at least one allowed amino acid.")
    missing = [code for code in enabled if code not in library]
    if missing:
      raise ValueError(f"Allowed amino acids {missing} have no template in the residue library.")
    # one letter codes, comparable with Residue.code
    self.allowed = []
    for code in enabled:
      code = library.lookup(code).code
      if code not in self.allowed:
        self.allowed.append(code)

  def plan(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> List[Tuple[Residue, str]]:
    """Draw the mutations of one call without touching the pose.

    Raises:
      ValueError: if a scheduled residue has no allowed alternative
    """
    scheduled: Dict[int, Residue] = {}
    candidates = self.candidates(pose, atoms)
    draws = self.rng.random(len(candidates))
    for atom, draw in zip(candidates, draws):
      if draw < self.p_mut and atom.container is not None:
        scheduled.setdefault(id(atom.container), atom.container)

    plan = []
    for residue in scheduled.values():
      options = [code for code in self.allowed if code != residue.code]
      if not options:
        raise ValueError(f"No allowed alternative for {residue.name}-{residue.id}, allowed types: {self.allowed}.")
      plan.append((residue, options[self.rng.integers(len(options))]))
    return plan

  def __call__(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> MutationOutcome:
    pose.sync_to_internal()
    plan = self.plan(pose, atoms)
    for residue, code in plan:
      mutate(pose, residue, self.library, code)
    if plan:
      logger.debug(f"DesignMutator applied {len(plan)} mutation(s): {', '.join(f'{r.id}{c}' for r, c in plan)}")
    return MutationOutcome(len(plan))


class RotamerMutator(Mutator):
  def __init__(
    self,
    rotamer_library: RotamerLibrary,
    p_mut: float = 1.0,
    selection: Optional[Selection] = None,
    n_first: Optional[int] = None,
    rng=None,
  ):
    """Replace side chain conformations with rotamers drawn from a library.

    Each residue owning a candidate atom draws once against ``p_mut``.

    Parameters:
      rotamer_library: Rotamers per residue type
      p_mut: Per residue mutation probability
      selection: Restricts the default candidates
      n_first: Only draw from the ``n_first`` most probable rotamers
      rng: ``numpy.random.Generator``, seed or ``None``
    """
    super().__init__(p_mut, selection, rng)
    if n_first is not None and n_first < 1:
      raise ValueError(f"n_first must be positive, got {n_first}.")
    self.rotamer_library = rotamer_library
    self.n_first = n_first

  def __call__(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> MutationOutcome:
    pose.sync_to_internal()
    count = 0
    for residue in self.residues_of(self.candidates(pose, atoms)):
      if self.rng.random() >= self.p_mut:
        continue
      rotamer = self.rotamer_library.sample(residue.name, self.rng, self.n_first)
      if rotamer is None:
        continue
      self.rotamer_library.apply(pose, residue, rotamer)
      count += 1
    return MutationOutcome(count)


class DihedralMutator(Mutator):
  def __init__(
    self,
    angle_sampler: Optional[AngleSampler] = None,
    p_mut: float = 1.0,
    step_size: float = np.pi,
    selection: Optional[Selection] = None,
    rng=None,
  ):
    """Random rotations about bonds of the internal coordinate tree.

    A selected atom turns the bond between its parent and grandparent,
    together with its siblings. Each bond turns at most once per call.

    Parameters:
      angle_sampler: Draws a unitless perturbation, scaled by ``step_size``.
        Uniform on ``[-1, 1]`` by default.
      p_mut: Per atom probability
      step_size: Largest rotation in radians for the default sampler
      selection: Restricts the default candidates
      rng: ``numpy.random.Generator``, seed or ``None``
    """
    super().__init__(p_mut, selection, rng)
    self.angle_sampler = angle_sampler or uniform_sampler
    self.step_size = step_size

  def __call__(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> MutationOutcome:
    pose.sync_to_internal()
    turned = set()
    count = 0
    for atom in self.candidates(pose, atoms):
      if atom.parent is None or id(atom.parent) in turned:
        continue
      if self.rng.random() >= self.p_mut:
        continue
      turned.add(id(atom.parent))
      pose.rotate_dihedral(atom, self.step_size * self.angle_sampler(self.rng))
      count += 1
    return MutationOutcome(count)


class BlockrotMutator(Mutator):
  def __init__(
    self,
    blocks: Sequence[Tuple[int, int]],
    p_mut: float = 1.0,
    step_size: float = np.pi / 18,
    translation_step_size: float = 0.0,
    n_tries: int = 10,
    rot_axis: str = "longitudinal",
    loop_closer=None,
    angle_sampler: Optional[AngleSampler] = None,
    rng=None,
  ):
    """Rigid body moves of residue blocks (e.g. helices) followed by loop closure.

    The block is rotated about its centroid and translated in cartesian
    space, which tears the chain at both block ends. The owned
    ``loop_closer`` driver then runs on the whole pose; only a converged
    closure keeps the move. Failed attempts are undone and retried up to
    ``n_tries`` times, after which the pose is restored and a failed outcome
    carrying the closer's status is returned.

    Parameters:
      blocks: ``(first, last)`` inclusive residue positions, see
        :func:`posekit.peptides.blocks_from_ss`
      p_mut: Probability of moving each block
      step_size: Largest rotation in radians for the default sampler
      translation_step_size: Largest shift per axis in Angstrom
      n_tries: Attempts per block before giving up
      rot_axis: ``"longitudinal"`` (first CA to last CA of the block) or ``"random"``
      loop_closer: Driver with ``run(pose) -> DriverState``, ``None`` keeps every move
      angle_sampler: Draws a unitless perturbation, scaled by ``step_size``
      rng: ``numpy.random.Generator``, seed or ``None``

    Raises:
      ValueError: on invalid blocks or options
    """
    super().__init__(p_mut, None, rng)
    if rot_axis not in ("longitudinal", "random"):
      raise ValueError(f'rot_axis must be "longitudinal" or "random", got "{rot_axis}".')
    if n_tries < 1:
      raise ValueError(f"n_tries must be positive, got {n_tries}.")
    for first, last in blocks:
      if first < 0 or last < first:
        raise ValueError(f"Invalid block ({first}, {last}).")
    self.blocks = [tuple(block) for block in blocks]
    self.step_size = step_size
    self.translation_step_size = translation_step_size
    self.n_tries = n_tries
    self.rot_axis = rot_axis
    self.loop_closer = loop_closer
    self.angle_sampler = angle_sampler or uniform_sampler

  def _axis(self, coords: np.ndarray, residues: List[Residue]) -> np.ndarray:
    if self.rot_axis == "longitudinal":
      first, last = residues[0].get("CA"), residues[-1].get("CA")
      if first is not None and last is not None and first is not last:
        axis = coords[last.index] - coords[first.index]
        norm = np.linalg.norm(axis)
        if norm > 1e-8:
          return axis / norm
      logger.warning("Block has no usable CA axis, using a random rotation axis")
    axis = self.rng.normal(size=3)
    return axis / np.linalg.norm(axis)

  def move_block(self, pose: Pose, first: int, last: int):
    """Apply one random rigid move to residues ``first..last`` (cartesian write)."""
    residues = pose.residues()[first : last + 1]
    indices = np.array([atom.index for residue in residues for atom in residue], dtype=int)
    coords = pose.coords
    block = coords[indices]
    center = block.mean(axis=0)
    angle = self.step_size * self.angle_sampler(self.rng)
    rotation = Rotation.from_rotvec(self._axis(coords, residues) * angle)
    shift = self.translation_step_size * self.rng.uniform(-1.0, 1.0, size=3)
    pose.state.set_coords(rotation.apply(block - center) + center + shift, indices)

  def __call__(self, pose: Pose, atoms: Optional[Iterable[Atom]] = None) -> MutationOutcome:
    n_residues = pose.topology.count_residues()
    for first, last in self.blocks:
      if last >= n_residues:
        raise ValueError(f"Block ({first}, {last}) exceeds the {n_residues} residues of the pose.")
    blocks = self.blocks
    if atoms is not None:
      positions = {id(residue): i for i, residue in enumerate(pose.residues())}
      touched = {positions[id(residue)] for residue in self.residues_of(atoms)}
      blocks = [(first, last) for first, last in blocks if any(first <= i <= last for i in touched)]

    outcome = MutationOutcome()
    for first, last in blocks:
      if self.rng.random() >= self.p_mut:
        continue
      result = self._move_and_close(pose, first, last)
      outcome = outcome.merge(result)
      if result.failed:
        break
    return outcome

  def _move_and_close(self, pose: Pose, first: int, last: int) -> MutationOutcome:
    pose.sync_to_cartesian()
    backup = pose.copy()
    status = None
    for attempt in range(1, self.n_tries + 1):
      self.move_block(pose, first, last)
      if self.loop_closer is None:
        return MutationOutcome(1)
      result = self.loop_closer.run(pose)
      status = result.status
      if status == DriverStatus.CONVERGED:
        logger.debug(f"Block {first}-{last} moved and closed on attempt {attempt}")
        return MutationOutcome(1)
      pose.restore(backup.copy())
    pose.restore(backup)
    message = f"loop closure of block {first}-{last} ended {status.value} after {self.n_tries} tries"
    logger.debug(message)
    return MutationOutcome(0, failed=True, message=message)


### FUNCTIONS ###
def uniform_sampler(rng: np.random.Generator) -> float:
  """Uniform perturbation on ``[-1, 1]``."""
  return float(rng.uniform(-1.0, 1.0))


def gaussian_sampler(sigma: float = 0.5) -> AngleSampler:
  """Normal perturbation with standard deviation ``sigma``."""
  return lambda rng: float(rng.normal(0.0, sigma))
