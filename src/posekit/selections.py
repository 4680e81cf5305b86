"""
Composable selection predicates over the molecular graph of a pose.

A selection works at one granularity (atoms, residues or segments) and
evaluates to a boolean mask over the nodes of that granularity in container
order. Selections of different granularity combine after the coarser one is
promoted down to the finer one. Nothing is cached: every call re-reads the
current pose.
"""

import re
from abc import ABC, abstractmethod
from typing import Any, Iterable, List, Type, Union

import numpy as np
from scipy.spatial import cKDTree

from posekit.graph import Atom, Residue, Segment
from posekit.pose import Pose

Node = Union[Atom, Residue, Segment]
NodeType = Type[Node]

# coarse to fine
_LEVELS = {Segment: 0, Residue: 1, Atom: 2}


### FUNCTIONS ###
def nodes_of(pose: Pose, selection_type: NodeType) -> List[Node]:
  """All nodes of a granularity in container order."""
  if selection_type is Atom:
    return list(pose.topology.atoms())
  if selection_type is Residue:
    return list(pose.topology.residues())
  if selection_type is Segment:
    return list(pose.topology.segments())
  raise ValueError(f"Unknown selection type {selection_type}, expected Atom, Residue or Segment.")


def _owners(pose: Pose, fine: NodeType, coarse: NodeType) -> np.ndarray:
  """For every node of ``fine`` granularity, the position of the ``coarse`` node that contains it."""
  positions = {id(node): i for i, node in enumerate(nodes_of(pose, coarse))}
  out = []
  for node in nodes_of(pose, fine):
    owner = node.container
    while _LEVELS[type(owner)] > _LEVELS[coarse]:
      owner = owner.container
    out.append(positions[id(owner)])
  return np.array(out, dtype=int)


def promote_mask(pose: Pose, mask: np.ndarray, source: NodeType, target: NodeType, mode: str = "any") -> np.ndarray:
  """Convert a mask between granularities.

  Parameters:
    pose: Pose the mask was evaluated on
    mask: Boolean mask over ``source`` nodes
    source: Granularity of ``mask``
    target: Granularity to convert to
    mode: When going to a coarser level, ``"any"`` selects a node if any of
      its members is selected, ``"all"`` only if all of them are

  Returns:
    Boolean mask over ``target`` nodes
  """
  if mode not in ("any", "all"):
    raise ValueError(f'Unknown promotion mode "{mode}", expected "any" or "all".')
  if source is target:
    return mask
  if _LEVELS[target] > _LEVELS[source]:
    return mask[_owners(pose, target, source)]
  owners = _owners(pose, source, target)
  n_target = len(nodes_of(pose, target))
  hits = np.bincount(owners[mask], minlength=n_target)
  if mode == "any":
    return hits > 0
  totals = np.bincount(owners, minlength=n_target)
  # empty containers are never selected
  return (hits == totals) & (totals > 0)


### CLASSES ###
class Selection(ABC):
  selection_type: NodeType = Atom

  @abstractmethod
  def mask(self, pose: Pose) -> np.ndarray:
    """Boolean mask over this selection's nodes in container order."""

  def __call__(self, pose: Pose, gather: bool = False) -> Union[np.ndarray, List[Node]]:
    """Evaluate the selection on the current pose.

    Parameters:
      pose: Pose to evaluate on
      gather: Return the selected nodes as a list (ordered by position)
        instead of a mask

    Returns:
      Boolean mask, or list of selected nodes if ``gather`` is set
    """
    mask = self.mask(pose)
    if not gather:
      return mask
    return [node for node, selected in zip(nodes_of(pose, self.selection_type), mask) if selected]

  def __and__(self, other: "Selection") -> "Selection":
    return BinarySelection(self, other, "and")

  def __or__(self, other: "Selection") -> "Selection":
    return BinarySelection(self, other, "or")

  def __invert__(self) -> "Selection":
    return UnarySelection(self)

  def promote(self, to: NodeType, mode: str = "any") -> "Selection":
    """Re-express this selection at another granularity."""
    if to is self.selection_type:
      return self
    return PromoteSelection(self, to, mode)


class TrueSelection(Selection):
  def __init__(self, selection_type: NodeType = Atom):
    """Select every node of a granularity."""
    self.selection_type = selection_type

  def __repr__(self):
    return f"TrueSelection({self.selection_type.__name__})"

  def mask(self, pose: Pose) -> np.ndarray:
    return np.ones(len(nodes_of(pose, self.selection_type)), dtype=bool)


class FieldSelection(Selection):
  def __init__(self, selection_type: NodeType, field: str, values: Any, regex: bool = False):
    """Select nodes whose attribute ``field`` matches one of ``values``.

    Parameters:
      selection_type: Granularity
      field: Node attribute to compare (e.g. ``"name"``)
      values: Single value or iterable of accepted values
      regex: Treat values as regular expressions matched against the full
        string form of the attribute
    """
    self.selection_type = selection_type
    self.field = field
    if isinstance(values, (str, int)) or not isinstance(values, Iterable):
      values = [values]
    self.values = list(values)
    self.regex = regex
    self._patterns = [re.compile(str(v)) for v in self.values] if regex else None

  def __repr__(self):
    return f"FieldSelection({self.selection_type.__name__}, {self.field}={self.values})"

  def _match(self, value) -> bool:
    if self._patterns is not None:
      return any(p.fullmatch(str(value)) for p in self._patterns)
    return value in self.values

  def mask(self, pose: Pose) -> np.ndarray:
    return np.array([self._match(getattr(node, self.field)) for node in nodes_of(pose, self.selection_type)], dtype=bool)


class RangeSelection(Selection):
  def __init__(self, selection_type: NodeType, field: str, start, stop):
    """Select nodes whose attribute ``field`` lies within ``[start, stop]``."""
    self.selection_type = selection_type
    self.field = field
    self.start = start
    self.stop = stop

  def __repr__(self):
    return f"RangeSelection({self.selection_type.__name__}, {self.start} <= {self.field} <= {self.stop})"

  def mask(self, pose: Pose) -> np.ndarray:
    values = [getattr(node, self.field) for node in nodes_of(pose, self.selection_type)]
    return np.array([self.start <= v <= self.stop for v in values], dtype=bool)


class BinarySelection(Selection):
  def __init__(self, left: Selection, right: Selection, op: str):
    """Combine two selections with ``"and"`` or ``"or"``. The result has the
    finer granularity of the two.
    """
    if op not in ("and", "or"):
      raise ValueError(f'Unknown selection operator "{op}", expected "and" or "or".')
    self.left = left
    self.right = right
    self.op = op
    if _LEVELS[left.selection_type] >= _LEVELS[right.selection_type]:
      self.selection_type = left.selection_type
    else:
      self.selection_type = right.selection_type

  def __repr__(self):
    return f"({self.left!r} {self.op} {self.right!r})"

  def mask(self, pose: Pose) -> np.ndarray:
    left = promote_mask(pose, self.left.mask(pose), self.left.selection_type, self.selection_type)
    right = promote_mask(pose, self.right.mask(pose), self.right.selection_type, self.selection_type)
    if self.op == "and":
      return left & right
    return left | right


class UnarySelection(Selection):
  def __init__(self, selection: Selection):
    """Negation of a selection."""
    self.selection = selection
    self.selection_type = selection.selection_type

  def __repr__(self):
    return f"~{self.selection!r}"

  def mask(self, pose: Pose) -> np.ndarray:
    return ~self.selection.mask(pose)


class PromoteSelection(Selection):
  def __init__(self, selection: Selection, to: NodeType, mode: str = "any"):
    """Re-express a selection at another granularity (see :func:`promote_mask`)."""
    if to not in _LEVELS:
      raise ValueError(f"Unknown selection type {to}, expected Atom, Residue or Segment.")
    if mode not in ("any", "all"):
      raise ValueError(f'Unknown promotion mode "{mode}", expected "any" or "all".')
    self.selection = selection
    self.selection_type = to
    self.mode = mode

  def __repr__(self):
    return f"{self.selection!r}->{self.selection_type.__name__}({self.mode})"

  def mask(self, pose: Pose) -> np.ndarray:
    return promote_mask(pose, self.selection.mask(pose), self.selection.selection_type, self.selection_type, self.mode)


class DistanceSelection(Selection):
  selection_type = Atom

  def __init__(self, selection: Selection, cutoff: float):
    """Atoms within ``cutoff`` Angstrom of any atom in ``selection``
    (the selected atoms themselves included). Reads cartesian coordinates, so
    a pending i2c is applied first.
    """
    if cutoff < 0:
      raise ValueError(f"Distance cutoff must be positive, got {cutoff}.")
    self.selection = selection
    self.cutoff = cutoff

  def __repr__(self):
    return f"within({self.cutoff}, {self.selection!r})"

  def mask(self, pose: Pose) -> np.ndarray:
    inner = promote_mask(pose, self.selection.mask(pose), self.selection.selection_type, Atom)
    coords = pose.coords
    out = np.zeros(len(coords), dtype=bool)
    if not inner.any():
      return out
    tree = cKDTree(coords)
    for neighbours in tree.query_ball_point(coords[inner], r=self.cutoff):
      out[neighbours] = True
    return out


### SHORTHANDS ###
def an(*names: str, regex: bool = False) -> FieldSelection:
  """Atoms by name."""
  return FieldSelection(Atom, "name", names, regex=regex)


def rn(*names: str, regex: bool = False) -> FieldSelection:
  """Residues by three letter name."""
  return FieldSelection(Residue, "name", names, regex=regex)


def rid(start: int, stop: int = None) -> RangeSelection:
  """Residues by number, a single id or an inclusive range."""
  return RangeSelection(Residue, "id", start, start if stop is None else stop)


def sn(*names: str) -> FieldSelection:
  """Segments by name."""
  return FieldSelection(Segment, "name", names)


def everything(selection_type: NodeType = Atom) -> TrueSelection:
  return TrueSelection(selection_type)


def within(cutoff: float, selection: Selection) -> DistanceSelection:
  return DistanceSelection(selection, cutoff)
