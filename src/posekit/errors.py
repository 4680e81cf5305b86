"""
Exceptions raised when a pose is corrupted or read in a stale state.
Configuration problems are reported with plain ``ValueError``.
"""


### CLASSES ###
class StructureIntegrityError(RuntimeError):
  """The molecular graph and the coordinate state no longer describe a valid
  structure (cycle in the internal coordinate tree, atom without a reachable
  root, index misalignment). Never recoverable.
  """


class StaleStateError(RuntimeError):
  """A coordinate representation was read while stale, or written while the
  other representation still had unsynced changes.
  """
