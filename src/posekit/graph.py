"""
Hierarchical molecular graph: segments own residues, residues own atoms.
Atoms carry two independent kinds of edges, covalent bonds (undirected,
arbitrary) and the internal coordinate tree (directed, one parent per atom)
that the coordinate state uses to convert between representations.
"""

from collections import deque
from typing import Dict, Iterator, List, Optional, Tuple

from posekit.constants import AA_ABR_TO_CODE
from posekit.errors import StructureIntegrityError


### CLASSES ###
class Atom:
  def __init__(self, name: str, element: str = "", index: int = -1):
    """A single atom in the molecular graph.

    Parameters:
      name: Atom name, unique within its residue only (e.g. ``"CA"``)
      element: Element symbol (e.g. ``"C"``)
      index: Row of this atom in the coordinate state, ``-1`` until the pose
        assigns one
    """
    self.name = name
    self.element = element
    self.index = index
    self.container: Optional["Residue"] = None
    self.bonds: List["Atom"] = []
    self.parent: Optional["Atom"] = None
    self.children: List["Atom"] = []

  def __repr__(self):
    res = f"{self.container.name}-{self.container.id}" if self.container is not None else "detached"
    return f"<Atom {self.name} #{self.index} ({res})>"

  @property
  def is_root(self) -> bool:
    """True if this atom hangs directly off the origin frame."""
    return self.parent is None

  def ascendents(self, depth: int = 3) -> List["Atom"]:
    """Return up to ``depth`` ancestors in the internal coordinate tree, nearest first."""
    out = []
    node = self.parent
    while node is not None and len(out) < depth:
      out.append(node)
      node = node.parent
    return out

  def descendents(self) -> List["Atom"]:
    """Return every atom below this one in the internal coordinate tree (breadth first)."""
    out = []
    queue = deque(self.children)
    while queue:
      atom = queue.popleft()
      out.append(atom)
      queue.extend(atom.children)
    return out


class Residue:
  def __init__(self, name: str, id: int):
    """An ordered container of atoms.

    Parameters:
      name: Three letter residue name (e.g. ``"ALA"``)
      id: Residue number
    """
    self.name = name
    self.id = id
    self.items: List[Atom] = []
    self.container: Optional["Segment"] = None
    self.prev: Optional["Residue"] = None
    self.next: Optional["Residue"] = None

  def __repr__(self):
    return f"<Residue {self.name}-{self.id} atoms={len(self.items)}>"

  def __iter__(self) -> Iterator[Atom]:
    return iter(self.items)

  def __len__(self):
    return len(self.items)

  def __contains__(self, name: str):
    return any(atom.name == name for atom in self.items)

  def __getitem__(self, name: str) -> Atom:
    for atom in self.items:
      if atom.name == name:
        return atom
    raise KeyError(f'Residue {self.name}-{self.id} has no atom named "{name}"')

  def get(self, name: str) -> Optional[Atom]:
    """Return an atom by name if present."""
    for atom in self.items:
      if atom.name == name:
        return atom
    return None

  @property
  def code(self) -> str:
    """One letter code of this residue (``"X"`` for unknown residues)."""
    return AA_ABR_TO_CODE.get(self.name, "X")

  def add(self, atom: Atom, position: Optional[int] = None):
    """Attach an atom to this residue, appending unless a position is given."""
    atom.container = self
    if position is None:
      self.items.append(atom)
    else:
      self.items.insert(position, atom)

  def remove(self, atom: Atom):
    """Detach an atom from this residue (bonds and tree edges are left to the caller)."""
    self.items.remove(atom)
    atom.container = None


class Segment:
  def __init__(self, name: str):
    """An ordered container of residues (a chain)."""
    self.name = name
    self.items: List[Residue] = []
    self.container: Optional["Topology"] = None

  def __repr__(self):
    return f"<Segment {self.name} residues={len(self.items)}>"

  def __iter__(self) -> Iterator[Residue]:
    return iter(self.items)

  def __len__(self):
    return len(self.items)

  def add(self, residue: Residue):
    """Append a residue, linking it after the current last residue."""
    residue.container = self
    if self.items:
      self.items[-1].next = residue
      residue.prev = self.items[-1]
    self.items.append(residue)


class Topology:
  def __init__(self, name: str = "UNK"):
    """Root of the molecular graph, owning the segments of a pose."""
    self.name = name
    self.items: List[Segment] = []

  def __repr__(self):
    return f"<Topology {self.name} segments={len(self.items)} residues={self.count_residues()} atoms={self.count_atoms()}>"

  def add(self, segment: Segment):
    segment.container = self
    self.items.append(segment)

  def segments(self) -> Iterator[Segment]:
    return iter(self.items)

  def residues(self) -> Iterator[Residue]:
    for segment in self.items:
      yield from segment.items

  def atoms(self) -> Iterator[Atom]:
    """Iterate over all atoms in container order (the order used for indexing)."""
    for residue in self.residues():
      yield from residue.items

  def count_atoms(self) -> int:
    return sum(len(residue) for residue in self.residues())

  def count_residues(self) -> int:
    return sum(len(segment) for segment in self.items)

  def copy(self) -> "Topology":
    """Deep copy of the whole graph, including bonds and tree edges.

    Built iteratively so long chains do not hit the recursion limit that
    ``copy.deepcopy`` runs into on cyclic bond lists.
    """
    new = Topology(self.name)
    atom_map: Dict[int, Atom] = {}
    for segment in self.items:
      new_segment = Segment(segment.name)
      new.add(new_segment)
      for residue in segment.items:
        new_residue = Residue(residue.name, residue.id)
        new_segment.add(new_residue)
        for atom in residue.items:
          new_atom = Atom(atom.name, atom.element, atom.index)
          new_residue.add(new_atom)
          atom_map[id(atom)] = new_atom
    for atom in self.atoms():
      new_atom = atom_map[id(atom)]
      new_atom.bonds = [atom_map[id(other)] for other in atom.bonds]
      new_atom.children = [atom_map[id(child)] for child in atom.children]
      if atom.parent is not None:
        new_atom.parent = atom_map[id(atom.parent)]
    return new

  def find(self, segment: str, residue_id: int, atom_name: str) -> Optional[Atom]:
    """Locate an atom by its stable identifier (segment name, residue id, atom name)."""
    for seg in self.items:
      if seg.name != segment:
        continue
      for res in seg.items:
        if res.id == residue_id:
          return res.get(atom_name)
    return None

  def atom_key_map(self) -> Dict[Tuple[str, int, str], Atom]:
    """Map every ``(segment, residue id, atom name)`` identifier to its atom."""
    out = {}
    for seg in self.items:
      for res in seg.items:
        for atom in res.items:
          out[(seg.name, res.id, atom.name)] = atom
    return out

  ## Edges
  @staticmethod
  def bond(a: Atom, b: Atom):
    """Add an undirected covalent bond between two atoms (idempotent)."""
    if a is b:
      raise ValueError(f"Cannot bond {a} to itself.")
    if b not in a.bonds:
      a.bonds.append(b)
    if a not in b.bonds:
      b.bonds.append(a)

  @staticmethod
  def unbond(a: Atom, b: Atom):
    if b in a.bonds:
      a.bonds.remove(b)
    if a in b.bonds:
      b.bonds.remove(a)

  @staticmethod
  def set_parent(child: Atom, parent: Optional[Atom]):
    """Re-hang ``child`` under ``parent`` in the internal coordinate tree.
    ``None`` makes ``child`` a root attached to the origin frame.
    """
    if child.parent is not None:
      child.parent.children.remove(child)
    child.parent = parent
    if parent is not None:
      parent.children.append(child)

  def detach(self, atom: Atom):
    """Remove every bond and tree edge of an atom and take it out of its residue.

    Raises:
      StructureIntegrityError: if other atoms still hang off ``atom`` in the tree
    """
    if atom.children:
      raise StructureIntegrityError(f"Cannot detach {atom}, {len(atom.children)} atom(s) still use it as parent.")
    for other in list(atom.bonds):
      self.unbond(atom, other)
    self.set_parent(atom, None)
    if atom.container is not None:
      atom.container.remove(atom)

  ## Internal coordinate tree
  def ascendents(self, atom: Atom) -> Tuple[int, int, int]:
    """Return state indices of the parent, grandparent and great-grandparent
    of ``atom``. Missing ancestors are filled with the virtual origin frame
    indices ``-1``, ``-2`` and ``-3``, continuing from the topmost real atom.
    """
    out = [a.index for a in atom.ascendents(3)]
    virtual = -1
    while len(out) < 3:
      out.append(virtual)
      virtual -= 1
    return tuple(out)

  def traverse(self) -> List[Atom]:
    """Return all atoms ordered so that every parent precedes its children.

    Raises:
      StructureIntegrityError: if the tree contains a cycle, a parent outside
        this topology, or atoms that cannot be reached from a root
    """
    atoms = list(self.atoms())
    members = set(map(id, atoms))
    roots = []
    for atom in atoms:
      if atom.parent is None:
        roots.append(atom)
      elif id(atom.parent) not in members:
        raise StructureIntegrityError(f"{atom} has a parent that is not part of the topology ({atom.parent}).")
    order = []
    seen = set()
    queue = deque(roots)
    while queue:
      atom = queue.popleft()
      if id(atom) in seen:
        raise StructureIntegrityError(f"Internal coordinate tree reaches {atom} twice.")
      seen.add(id(atom))
      order.append(atom)
      queue.extend(atom.children)
    if len(order) != len(atoms):
      missing = [atom for atom in atoms if id(atom) not in seen]
      raise StructureIntegrityError(
        f"{len(missing)} atom(s) are not reachable from any root of the internal coordinate tree (first: {missing[0]})."
      )
    return order

  def validate(self, n_rows: int):
    """Check that atom indices are exactly ``0..n_rows-1`` in container order.

    Raises:
      StructureIntegrityError: on any misalignment between graph and state
    """
    count = 0
    for i, atom in enumerate(self.atoms()):
      if atom.index != i:
        raise StructureIntegrityError(f"{atom} sits at position {i} but carries index {atom.index}.")
      count += 1
    if count != n_rows:
      raise StructureIntegrityError(f"Topology has {count} atoms but the coordinate state has {n_rows} rows.")
