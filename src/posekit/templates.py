"""
Residue templates (the "grammar" used to build and mutate peptides). A
template lists a residue's atoms in internal coordinate form: each atom names
its parent in the internal coordinate tree together with its bond length,
bond angle and dihedral relative to that parent chain.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from posekit.constants import (
  AA_ABR_TO_CODE,
  ANGLE_C_N_CA,
  ANGLE_CA_C_N,
  ANGLE_CA_C_O,
  ANGLE_N_CA_C,
  BOND_C_N,
  BOND_C_O,
  BOND_CA_C,
  BOND_N_CA,
)
from posekit.geometry import deg_to_rad

# Parent name used by a residue's first atom to hang off the previous residue's C
LINK_PARENT = "-C"


### CLASSES ###
@dataclass
class TemplateAtom:
  """Atom entry of a residue template.

  Attributes:
    name: Atom name (e.g. CB)
    element: Element symbol
    parent: Parent atom name in the same residue, or ``LINK_PARENT``
    b: Bond length to the parent in Angstrom
    theta: Bond angle grandparent-parent-atom in radians
    phi: Dihedral great-grandparent-grandparent-parent-atom in radians
  """
  name: str
  element: str
  parent: Optional[str]
  b: float
  theta: float
  phi: float


@dataclass
class ResidueTemplate:
  """Topology template of one residue type.

  Attributes:
    name: Three letter residue name
    code: One letter code
    atoms: Atoms in build order, every parent listed before its children
    bonds: Extra bonds that are not internal coordinate tree edges (ring closures)
    chis: Names of the atoms whose dihedral is chi1, chi2, ...
  """
  name: str
  code: str
  atoms: List[TemplateAtom]
  bonds: List[Tuple[str, str]] = field(default_factory=list)
  chis: List[str] = field(default_factory=list)

  def __post_init__(self):
    seen = set()
    for atom in self.atoms:
      if atom.parent is not None and atom.parent != LINK_PARENT and atom.parent not in seen:
        raise ValueError(f'Template {self.name}: atom "{atom.name}" is listed before its parent "{atom.parent}".')
      if atom.name in seen:
        raise ValueError(f'Template {self.name}: duplicate atom name "{atom.name}".')
      seen.add(atom.name)
    for a, b in self.bonds:
      if a not in seen or b not in seen:
        raise ValueError(f"Template {self.name}: bond {a}-{b} references an unknown atom.")
    for name in self.chis:
      if name not in seen:
        raise ValueError(f'Template {self.name}: chi atom "{name}" does not exist.')

  def __contains__(self, name: str):
    return any(atom.name == name for atom in self.atoms)

  def __getitem__(self, name: str) -> TemplateAtom:
    for atom in self.atoms:
      if atom.name == name:
        return atom
    raise KeyError(f'Template {self.name} has no atom named "{name}"')

  def atom_names(self) -> List[str]:
    return [atom.name for atom in self.atoms]

  def children_of(self, name: str) -> List[TemplateAtom]:
    """Template atoms whose parent is ``name``, in template order."""
    return [atom for atom in self.atoms if atom.parent == name]


class ResidueLibrary:
  def __init__(self, templates: Iterable[ResidueTemplate]):
    """Collection of residue templates searchable by one or three letter code.

    Parameters:
      templates: Templates to register, later entries replace earlier ones
    """
    self.templates: Dict[str, ResidueTemplate] = {}
    for template in templates:
      self.templates[template.name] = template

  def __repr__(self):
    return f"<ResidueLibrary templates=[{', '.join(sorted(self.codes()))}]>"

  def __len__(self):
    return len(self.templates)

  def __contains__(self, code: str):
    return self._resolve(code) is not None

  def _resolve(self, code: str) -> Optional[ResidueTemplate]:
    code = code.upper()
    if code in self.templates:
      return self.templates[code]
    for template in self.templates.values():
      if template.code == code:
        return template
    return None

  def lookup(self, code: str) -> ResidueTemplate:
    """Return the template for a residue type.

    Parameters:
      code: One letter code (``"A"``) or three letter name (``"ALA"``)

    Returns:
      Matching residue template

    Raises:
      ValueError: if no template matches
    """
    template = self._resolve(code)
    if template is None:
      raise ValueError(f'No residue template for "{code}". Available: {sorted(self.codes())}')
    return template

  def codes(self) -> List[str]:
    """One letter codes of every template."""
    return [template.code for template in self.templates.values()]

  @classmethod
  def from_dict(cls, data: Dict[str, dict]) -> "ResidueLibrary":
    """Build a library from a JSON-shaped dictionary. Angles are in degrees.

    Expected layout::

      {"ALA": {"code": "A",
               "atoms": [["N", "N", "-C", 1.329, 116.2, 180.0], ...],
               "bonds": [],
               "chis": []}}

    Parameters:
      data: Dictionary keyed by three letter residue name

    Returns:
      New residue library
    """
    templates = []
    for name, entry in data.items():
      atoms = [
        TemplateAtom(atom_name, element, parent, float(b), deg_to_rad(float(theta)), deg_to_rad(float(phi)))
        for atom_name, element, parent, b, theta, phi in entry["atoms"]
      ]
      code = entry.get("code", AA_ABR_TO_CODE.get(name.upper(), "X"))
      bonds = [tuple(bond) for bond in entry.get("bonds", [])]
      templates.append(ResidueTemplate(name.upper(), code, atoms, bonds, list(entry.get("chis", []))))
    return cls(templates)


## Built-in heavy atom templates
# Backbone shared by every amino acid, with an extended (phi = psi = omega = 180) conformation
_BACKBONE = [
  ["N", "N", LINK_PARENT, BOND_C_N, ANGLE_CA_C_N, 180.0],
  ["CA", "C", "N", BOND_N_CA, ANGLE_C_N_CA, 180.0],
  ["C", "C", "CA", BOND_CA_C, ANGLE_N_CA_C, 180.0],
  ["O", "O", "C", BOND_C_O, ANGLE_CA_C_O, 0.0],
]
# CB dihedral sits 122.6 degrees below the C dihedral (L chirality)
_CB = ["CB", "C", "CA", 1.530, 110.5, 57.4]

# name: (side chain atoms after CB, extra bonds, chi atoms)
_SIDECHAINS = {
  "GLY": ([], [], []),
  "ALA": ([], [], []),
  "SER": ([["OG", "O", "CB", 1.417, 110.8, -63.3]], [], ["OG"]),
  "CYS": ([["SG", "S", "CB", 1.808, 113.8, -62.2]], [], ["SG"]),
  "VAL": (
    [["CG1", "C", "CB", 1.527, 110.7, 177.2], ["CG2", "C", "CB", 1.527, 110.4, -63.3]],
    [],
    ["CG1"],
  ),
  "THR": (
    [["OG1", "O", "CB", 1.417, 109.2, 60.0], ["CG2", "C", "CB", 1.527, 111.1, -60.3]],
    [],
    ["OG1"],
  ),
  "LEU": (
    [
      ["CG", "C", "CB", 1.530, 116.1, -60.1],
      ["CD1", "C", "CG", 1.524, 110.3, 174.9],
      ["CD2", "C", "CG", 1.525, 110.6, 66.7],
    ],
    [],
    ["CG", "CD1"],
  ),
  "ILE": (
    [
      ["CG1", "C", "CB", 1.527, 110.7, 59.7],
      ["CG2", "C", "CB", 1.527, 110.4, -61.6],
      ["CD1", "C", "CG1", 1.520, 113.97, 169.8],
    ],
    [],
    ["CG1", "CD1"],
  ),
  "ASP": (
    [
      ["CG", "C", "CB", 1.520, 113.06, -70.4],
      ["OD1", "O", "CG", 1.250, 119.22, -46.7],
      ["OD2", "O", "CG", 1.250, 118.22, 133.3],
    ],
    [],
    ["CG", "OD1"],
  ),
  "ASN": (
    [
      ["CG", "C", "CB", 1.520, 112.62, -65.5],
      ["OD1", "O", "CG", 1.230, 120.85, -58.3],
      ["ND2", "N", "CG", 1.330, 116.48, 121.7],
    ],
    [],
    ["CG", "OD1"],
  ),
  "GLU": (
    [
      ["CG", "C", "CB", 1.520, 113.82, -63.8],
      ["CD", "C", "CG", 1.520, 113.31, -179.8],
      ["OE1", "O", "CD", 1.250, 119.02, -6.2],
      ["OE2", "O", "CD", 1.250, 118.08, 173.8],
    ],
    [],
    ["CG", "CD", "OE1"],
  ),
  "GLN": (
    [
      ["CG", "C", "CB", 1.520, 113.75, -60.2],
      ["CD", "C", "CG", 1.520, 112.78, -69.6],
      ["OE1", "O", "CD", 1.240, 120.86, -50.5],
      ["NE2", "N", "CD", 1.330, 116.50, 129.5],
    ],
    [],
    ["CG", "CD", "OE1"],
  ),
  "MET": (
    [
      ["CG", "C", "CB", 1.520, 113.68, -64.4],
      ["SD", "S", "CG", 1.810, 112.69, -179.6],
      ["CE", "C", "SD", 1.790, 100.61, 70.0],
    ],
    [],
    ["CG", "SD", "CE"],
  ),
  "LYS": (
    [
      ["CG", "C", "CB", 1.520, 113.83, -64.5],
      ["CD", "C", "CG", 1.520, 111.79, -178.1],
      ["CE", "C", "CD", 1.460, 111.68, -179.6],
      ["NZ", "N", "CE", 1.330, 124.79, 179.6],
    ],
    [],
    ["CG", "CD", "CE", "NZ"],
  ),
  "ARG": (
    [
      ["CG", "C", "CB", 1.520, 113.83, -65.2],
      ["CD", "C", "CG", 1.520, 111.79, -179.2],
      ["NE", "N", "CD", 1.460, 111.68, -179.3],
      ["CZ", "C", "NE", 1.330, 124.79, -178.7],
      ["NH1", "N", "CZ", 1.330, 120.64, 0.0],
      ["NH2", "N", "CZ", 1.330, 119.63, 180.0],
    ],
    [],
    ["CG", "CD", "NE", "CZ"],
  ),
  "PRO": (
    [
      ["CG", "C", "CB", 1.490, 104.21, 29.6],
      ["CD", "C", "CG", 1.500, 105.03, -34.8],
    ],
    [("CD", "N")],
    [],
  ),
  "PHE": (
    [
      ["CG", "C", "CB", 1.500, 113.85, -64.7],
      ["CD1", "C", "CG", 1.390, 120.0, 93.3],
      ["CD2", "C", "CG", 1.390, 120.0, -86.7],
      ["CE1", "C", "CD1", 1.390, 120.0, 180.0],
      ["CE2", "C", "CD2", 1.390, 120.0, 180.0],
      ["CZ", "C", "CE1", 1.390, 120.0, 0.0],
    ],
    [("CE2", "CZ")],
    ["CG", "CD1"],
  ),
  "TYR": (
    [
      ["CG", "C", "CB", 1.510, 113.8, -64.3],
      ["CD1", "C", "CG", 1.390, 120.98, 93.1],
      ["CD2", "C", "CG", 1.390, 120.82, -86.9],
      ["CE1", "C", "CD1", 1.390, 120.0, 180.0],
      ["CE2", "C", "CD2", 1.390, 120.0, 180.0],
      ["CZ", "C", "CE1", 1.390, 120.0, 0.0],
      ["OH", "O", "CZ", 1.390, 119.78, 180.0],
    ],
    [("CE2", "CZ")],
    ["CG", "CD1"],
  ),
  "HIS": (
    [
      ["CG", "C", "CB", 1.490, 113.74, -63.2],
      ["ND1", "N", "CG", 1.380, 122.85, -75.7],
      ["CD2", "C", "CG", 1.360, 130.61, 104.3],
      ["CE1", "C", "ND1", 1.320, 108.5, 180.0],
      ["NE2", "N", "CD2", 1.350, 108.5, 180.0],
    ],
    [("CE1", "NE2")],
    ["CG", "ND1"],
  ),
  "TRP": (
    [
      ["CG", "C", "CB", 1.500, 114.10, -66.4],
      ["CD1", "C", "CG", 1.370, 127.07, 96.3],
      ["CD2", "C", "CG", 1.430, 126.66, -83.7],
      ["NE1", "N", "CD1", 1.380, 108.5, 180.0],
      ["CE2", "C", "CD2", 1.400, 108.5, 180.0],
      ["CE3", "C", "CD2", 1.400, 133.83, 0.0],
      ["CZ2", "C", "CE2", 1.400, 120.0, 180.0],
      ["CZ3", "C", "CE3", 1.400, 120.0, 180.0],
      ["CH2", "C", "CZ2", 1.400, 120.0, 0.0],
    ],
    [("NE1", "CE2"), ("CZ3", "CH2")],
    ["CG", "CD1"],
  ),
}


### FUNCTIONS ###
def default_templates() -> Dict[str, dict]:
  """Return the built-in heavy atom templates as a JSON-shaped dictionary
  (see :meth:`ResidueLibrary.from_dict`)."""
  data = {}
  for name, (sidechain, bonds, chis) in _SIDECHAINS.items():
    atoms = [list(atom) for atom in _BACKBONE]
    if name != "GLY":
      atoms.append(list(_CB))
    atoms.extend(list(atom) for atom in sidechain)
    data[name] = {
      "code": AA_ABR_TO_CODE[name],
      "atoms": atoms,
      "bonds": [list(bond) for bond in bonds],
      "chis": list(chis),
    }
  return data


def default_library() -> ResidueLibrary:
  """Residue library with heavy atom templates for the 20 standard amino acids."""
  return ResidueLibrary.from_dict(default_templates())
