"""
Geometry helpers shared by the coordinate state, the mutators and the energy
components. All angles are in radians unless a function name says otherwise.
"""

import math
from typing import Union

import numpy as np

ArrayLike = Union[np.ndarray, list, tuple]


### FUNCTIONS ###
def deg_to_rad(deg: float) -> float:
  """Convert degrees to radians."""
  return deg * math.pi / 180.0


def rad_to_deg(rad: float) -> float:
  """Convert radians to degrees."""
  return rad * 180.0 / math.pi


def wrap_angle(angle: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
  """Wrap an angle (or array of angles) into the interval (-pi, pi].

  Parameters:
    angle: Angle(s) in radians

  Returns:
    Wrapped angle(s) in radians
  """
  wrapped = np.mod(np.asarray(angle, dtype=float) + np.pi, 2.0 * np.pi) - np.pi
  wrapped = np.where(wrapped <= -np.pi, wrapped + 2.0 * np.pi, wrapped)
  if np.ndim(wrapped) == 0:
    return float(wrapped)
  return wrapped


def _normalize(v: np.ndarray) -> np.ndarray:
  norm = np.linalg.norm(v, axis=-1, keepdims=True)
  return v / np.where(norm < 1e-12, 1.0, norm)


def distance(a: ArrayLike, b: ArrayLike) -> float:
  """Return the Euclidean distance between two points in Angstrom."""
  return float(np.linalg.norm(np.asarray(b, dtype=float) - np.asarray(a, dtype=float)))


def angle(a: ArrayLike, b: ArrayLike, c: ArrayLike) -> float:
  """Return the angle a-b-c (vertex at ``b``) in radians."""
  return float(angles(np.atleast_2d(a), np.atleast_2d(b), np.atleast_2d(c))[0])


def dihedral(a: ArrayLike, b: ArrayLike, c: ArrayLike, d: ArrayLike) -> float:
  """Return the signed dihedral a-b-c-d in radians, in (-pi, pi].

  Follows the IUPAC convention: 0 is cis, positive values are clockwise when
  looking down the b->c bond.
  """
  return float(dihedrals(np.atleast_2d(a), np.atleast_2d(b), np.atleast_2d(c), np.atleast_2d(d))[0])


def distances(a: np.ndarray, b: np.ndarray) -> np.ndarray:
  """Row-wise distances between two ``(N, 3)`` arrays."""
  return np.linalg.norm(b - a, axis=1)


def angles(a: np.ndarray, b: np.ndarray, c: np.ndarray) -> np.ndarray:
  """Row-wise a-b-c angles (vertex at ``b``) for ``(N, 3)`` arrays.

  Uses ``arctan2(|u x v|, u . v)`` which stays accurate near 0 and pi.
  """
  u = a - b
  v = c - b
  cross = np.linalg.norm(np.cross(u, v), axis=1)
  dot = np.einsum("ij,ij->i", u, v)
  return np.arctan2(cross, dot)


def dihedrals(a: np.ndarray, b: np.ndarray, c: np.ndarray, d: np.ndarray) -> np.ndarray:
  """Row-wise a-b-c-d dihedrals for ``(N, 3)`` arrays, in (-pi, pi].

  Degenerate rows (collinear atoms) return 0.
  """
  b1 = b - a
  b2 = c - b
  b3 = d - c
  n1 = np.cross(b1, b2)
  n2 = np.cross(b2, b3)
  b2_norm = np.linalg.norm(b2, axis=1)
  y = b2_norm * np.einsum("ij,ij->i", b1, n2)
  x = np.einsum("ij,ij->i", n1, n2)
  return np.arctan2(y, x)


def place_atom(a: ArrayLike, b: ArrayLike, c: ArrayLike, bond: float, theta: float, phi: float) -> np.ndarray:
  """Compute the position of a fourth atom ``d`` from internal coordinates
  (Natural Extension Reference Frame).

  Parameters:
    a: Position of the great-grandparent of ``d``
    b: Position of the grandparent of ``d``
    c: Position of the parent of ``d``
    bond: Distance c-d in Angstrom
    theta: Angle b-c-d in radians
    phi: Dihedral a-b-c-d in radians

  Returns:
    Cartesian position of ``d`` as a ``(3,)`` array

  Raises:
    ValueError: if ``b`` and ``c`` overlap and no bond axis can be defined
  """
  a = np.asarray(a, dtype=float)
  b = np.asarray(b, dtype=float)
  c = np.asarray(c, dtype=float)
  bc = c - b
  bc_norm = np.linalg.norm(bc)
  if bc_norm < 1e-12:
    raise ValueError("Cannot place atom, parent and grandparent overlap.")
  bc = bc / bc_norm
  n = np.cross(b - a, bc)
  n_norm = np.linalg.norm(n)
  if n_norm < 1e-12:
    # collinear references, the dihedral is undefined so any normal will do
    helper = np.array([1.0, 0.0, 0.0]) if abs(bc[0]) < 0.9 else np.array([0.0, 1.0, 0.0])
    n = np.cross(helper, bc)
    n_norm = np.linalg.norm(n)
  n = n / n_norm
  m = np.column_stack((bc, np.cross(n, bc), n))
  d2 = np.array(
    [
      -bond * math.cos(theta),
      bond * math.sin(theta) * math.cos(phi),
      bond * math.sin(theta) * math.sin(phi),
    ]
  )
  return c + m @ d2


def centroid(coords: np.ndarray) -> np.ndarray:
  """Return the geometric center of an ``(N, 3)`` array."""
  return np.asarray(coords, dtype=float).mean(axis=0)


def unit_vector(v: ArrayLike) -> np.ndarray:
  """Return ``v`` scaled to unit length (zero vectors are returned unchanged)."""
  return _normalize(np.asarray(v, dtype=float))
