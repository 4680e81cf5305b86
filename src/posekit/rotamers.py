"""
Side chain rotamer libraries. A rotamer is a set of chi dihedrals with an
occurrence probability; applying one writes the chi values through the
pose's internal coordinates.
"""

import itertools
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from posekit.geometry import deg_to_rad
from posekit.graph import Residue
from posekit.pose import Pose
from posekit.templates import ResidueLibrary

# chi1 staggered states (degrees, probability)
_CHI1_STATES = [("m", -60.0, 0.55), ("t", 180.0, 0.30), ("p", 60.0, 0.15)]
_CHI2_STATES = [("m", -60.0, 0.50), ("t", 180.0, 0.35), ("p", 60.0, 0.15)]
_CHI2_AROMATIC_STATES = [("90", 90.0, 0.50), ("-90", -90.0, 0.50)]
_AROMATIC = {"PHE", "TYR", "HIS", "TRP"}


### CLASSES ###
@dataclass
class Rotamer:
  """A side chain conformation.

  Attributes:
    name: Label such as ``"mt"`` (one letter per chi)
    chis: Chi dihedrals in radians, chi1 first
    probability: Occurrence probability within its residue type
  """
  name: str
  chis: List[float]
  probability: float


class RotamerLibrary:
  def __init__(self, rotamers: Dict[str, List[Rotamer]], chi_atoms: Dict[str, List[str]]):
    """Rotamers per residue type.

    Parameters:
      rotamers: Rotamers keyed by three letter residue name
      chi_atoms: Names of the atoms whose dihedral is chi1, chi2, ... keyed by
        three letter residue name

    Raises:
      ValueError: if a rotamer defines more chis than its residue has
    """
    for name, entries in rotamers.items():
      n_chis = len(chi_atoms.get(name, []))
      for rotamer in entries:
        if len(rotamer.chis) > n_chis:
          raise ValueError(f"Rotamer {name}:{rotamer.name} defines {len(rotamer.chis)} chis but {name} only has {n_chis}.")
    self.rotamers = {name: sorted(entries, key=lambda r: -r.probability) for name, entries in rotamers.items()}
    self.chi_atoms = chi_atoms

  def __repr__(self):
    return f"<RotamerLibrary residues={len(self.rotamers)}>"

  def __contains__(self, res_name: str):
    return bool(self.rotamers.get(res_name.upper()))

  def get(self, res_name: str) -> List[Rotamer]:
    """Rotamers of a residue type, most probable first (empty if none)."""
    return list(self.rotamers.get(res_name.upper(), []))

  def sample(self, res_name: str, rng: np.random.Generator, n_first: Optional[int] = None) -> Optional[Rotamer]:
    """Draw a rotamer weighted by probability.

    Parameters:
      res_name: Three letter residue name
      rng: Random number generator
      n_first: Only consider the ``n_first`` most probable rotamers

    Returns:
      A rotamer, or ``None`` if the residue type has no rotamers
    """
    choices = self.get(res_name)
    if n_first is not None:
      choices = choices[:n_first]
    if not choices:
      return None
    weights = np.array([r.probability for r in choices], dtype=float)
    weights = weights / weights.sum() if weights.sum() > 0 else np.full(len(choices), 1 / len(choices))
    return choices[rng.choice(len(choices), p=weights)]

  def apply(self, pose: Pose, residue: Residue, rotamer: Rotamer):
    """Write a rotamer's chi dihedrals into ``residue`` (an i2c is requested).

    Raises:
      KeyError: if a chi atom is missing from the residue
    """
    for atom_name, chi in zip(self.chi_atoms.get(residue.name, []), rotamer.chis):
      pose.set_dihedral(residue[atom_name], chi)

  @classmethod
  def from_dict(cls, data: Dict[str, dict]) -> "RotamerLibrary":
    """Build a library from a JSON-shaped dictionary. Angles are in degrees.

    Expected layout::

      {"SER": {"chi_atoms": ["OG"],
               "rotamers": [["m", [-65.0], 0.5], ["p", [64.0], 0.4]]}}
    """
    rotamers = {}
    chi_atoms = {}
    for name, entry in data.items():
      name = name.upper()
      chi_atoms[name] = list(entry["chi_atoms"])
      rotamers[name] = [
        Rotamer(label, [deg_to_rad(float(chi)) for chi in chis], float(probability))
        for label, chis, probability in entry.get("rotamers", [])
      ]
    return cls(rotamers, chi_atoms)


### FUNCTIONS ###
def _states_for(name: str, n_chis: int) -> List[Sequence]:
  states = [_CHI1_STATES]
  if n_chis >= 2:
    states.append(_CHI2_AROMATIC_STATES if name in _AROMATIC else _CHI2_STATES)
  return states


def default_rotamer_library(library: ResidueLibrary) -> RotamerLibrary:
  """Generic staggered rotamer library for the chi1 and chi2 angles of every
  template in ``library``. Aromatic chi2 takes the two perpendicular states.
  Probabilities are products of the per-chi state probabilities.
  """
  data = {}
  for template in library.templates.values():
    chis = template.chis[:2]
    entries = []
    if chis:
      for combo in itertools.product(*_states_for(template.name, len(chis))):
        label = "".join(state[0] if len(state[0]) == 1 else f"[{state[0]}]" for state in combo)
        entries.append([label, [state[1] for state in combo], float(np.prod([state[2] for state in combo]))])
    data[template.name] = {"chi_atoms": list(chis), "rotamers": entries}
  return RotamerLibrary.from_dict(data)
