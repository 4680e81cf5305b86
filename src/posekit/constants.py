"""
This file contains constants.
"""

from dataclasses import dataclass
from typing import Dict, Tuple

import numpy as np

## Backbone Atoms
# Names of atoms that define a protein's backbone trace
BACKBONE_ATOMS_AA = {"N", "CA", "C"}
# Backbone atoms kept in place when a residue's side chain is swapped
BACKBONE_ATOMS_PEPTIDE = BACKBONE_ATOMS_AA.union({"O"})

## Amino Acid Codes and Properties
# Codes for standard amino acids
STANDARD_AAs = set("ACDEFGHIKLMNPQRSTVWY")


# Amino acid Record class
@dataclass(frozen=True)
class AARecord:
  code: str  # 1-letter code
  abr: str  # 3-letter abbreviation
  name: str  # full name (upper-cased)


## Amino acids keyed by ABR
AA_RECORDS: Dict[str, AARecord] = {
  "ALA": AARecord("A", "ALA", "ALANINE"),
  "ARG": AARecord("R", "ARG", "ARGININE"),
  "ASN": AARecord("N", "ASN", "ASPARAGINE"),
  "ASP": AARecord("D", "ASP", "ASPARTIC ACID"),
  "CYS": AARecord("C", "CYS", "CYSTEINE"),
  "GLN": AARecord("Q", "GLN", "GLUTAMINE"),
  "GLU": AARecord("E", "GLU", "GLUTAMIC ACID"),
  "GLY": AARecord("G", "GLY", "GLYCINE"),
  "HIS": AARecord("H", "HIS", "HISTIDINE"),
  "ILE": AARecord("I", "ILE", "ISOLEUCINE"),
  "LEU": AARecord("L", "LEU", "LEUCINE"),
  "LYS": AARecord("K", "LYS", "LYSINE"),
  "MET": AARecord("M", "MET", "METHIONINE"),
  "PHE": AARecord("F", "PHE", "PHENYLALANINE"),
  "PRO": AARecord("P", "PRO", "PROLINE"),
  "SER": AARecord("S", "SER", "SERINE"),
  "THR": AARecord("T", "THR", "THREONINE"),
  "TRP": AARecord("W", "TRP", "TRYPTOPHAN"),
  "TYR": AARecord("Y", "TYR", "TYROSINE"),
  "VAL": AARecord("V", "VAL", "VALINE"),
}

AA_ABR_TO_CODE: Dict[str, str] = {abr: rec.code for abr, rec in AA_RECORDS.items()}
AA_CODE_TO_ABR: Dict[str, str] = {rec.code: abr for abr, rec in AA_RECORDS.items()}
AA_ABR_TO_NAME: Dict[str, str] = {abr: rec.name for abr, rec in AA_RECORDS.items()}

# Default availability map for design. Every mutator receives its own copy.
AVAILABLE_AMINOACIDS: Dict[str, bool] = {code: True for code in sorted(STANDARD_AAs)}

## Ideal backbone geometry
# Bond lengths in Angstrom, angles in degrees
BOND_N_CA = 1.458
BOND_CA_C = 1.525
BOND_C_N = 1.329
BOND_C_O = 1.231
ANGLE_C_N_CA = 121.7
ANGLE_N_CA_C = 111.2
ANGLE_CA_C_N = 116.2
ANGLE_CA_C_O = 120.5

## Secondary structure presets
# (phi, psi, omega) in degrees applied by ``peptides.apply_ss``
SS_DIHEDRALS: Dict[str, Tuple[float, float, float]] = {
  "H": (-60.0, -45.0, 180.0),  # alpha helix
  "E": (-139.0, 135.0, -177.0),  # beta strand (antiparallel)
  "C": (-180.0, 180.0, 180.0),  # extended coil
}
# Secondary structure codes that define a rigid block for block rotations
SS_BLOCK_CODES = {"H", "E"}

## Internal coordinate tree
# Virtual reference frame used as parent, grandparent and great-grandparent of
# root atoms. Index -1 is the immediate parent of a root atom, -2 the one above.
ORIGIN_FRAME = np.array(
  [
    [0.0, 0.0, 0.0],
    [-1.0, 0.0, 0.0],
    [-1.0, 1.0, 0.0],
  ],
  dtype=float,
)
# Offsets from a root atom to the virtual grandparent (-1) and great-grandparent
# (-2) of the atoms below it, so that frame follows the root wherever it sits.
ROOT_FRAME = ORIGIN_FRAME[1:] - ORIGIN_FRAME[0]
