"""
Reporting hooks for driver loops. All of them are side effects only.
"""

from typing import IO, List, Optional, Sequence

import pandas as pd

from posekit.convert import write_pdb_model
from posekit.drivers import Callback, DriverState
from posekit.log import logger
from posekit.pose import Pose


### CLASSES ###
class TrajectoryRecorder:
  def __init__(self, frequency: int = 1, sequence: bool = True):
    """Collect one row of driver state per call.

    Register it with :meth:`callback`. The rows are available as a
    ``pandas.DataFrame`` through :attr:`df`, with one ``energy_<name>``
    column per energy component.

    Parameters:
      frequency: Record every ``frequency`` steps
      sequence: Also record the pose sequence
    """
    self.frequency = frequency
    self.sequence = sequence
    self.rows: List[dict] = []

  def __call__(self, pose: Pose, state: DriverState):
    row = {
      "step": state.step,
      "status": state.status.value,
      "energy": state.energy,
      "temperature": state.temperature,
      "acceptance_count": state.acceptance_count,
      "step_size": state.step_size,
      "max_force": state.max_force,
    }
    for key, value in state.components.items():
      row[f"energy_{key}"] = value
    if self.sequence:
      row["sequence"] = pose.sequence()
    self.rows.append(row)

  def callback(self) -> Callback:
    return Callback(self, self.frequency)

  @property
  def df(self) -> pd.DataFrame:
    return pd.DataFrame(self.rows)


### FUNCTIONS ###
def energy_reporter(frequency: int = 1, name: str = "MC", components: Optional[Sequence[str]] = None) -> Callback:
  """Callback logging fixed-width lines of driver progress.

  The first report is preceded by a header naming the columns. Every line
  holds the total energy, one column per energy component and the
  temperature.

  Parameters:
    frequency: Report every ``frequency`` steps
    name: Driver label at the start of each line
    components: Component names to report, defaults to the components of
      the first reported state. Missing components are reported as 0.

  Returns:
    Callback to register with a driver
  """
  columns: List[str] = list(components) if components is not None else []
  header = {"printed": False}

  def report(pose: Pose, state: DriverState):
    if not header["printed"]:
      if components is None:
        columns.extend(state.components)
      keys = " ".join(f"{key.upper():>11s}" for key in ["total"] + columns)
      logger.info(f"{name:>10s} {'STEP':>6s} {keys} | TEMPERATURE")
      header["printed"] = True
    values = " ".join(f"{state.components.get(key, 0.0):>11.4e}" for key in columns)
    logger.info(f"{name:>10s} {state.step:>6d} {state.energy:>11.4e} {values} | {state.temperature:>6.3f}")

  return Callback(report, frequency)


def pdb_frame_writer(handle: IO, frequency: int = 1) -> Callback:
  """Callback appending the current pose as a numbered PDB model to ``handle``."""
  counter = {"model": 0}

  def write(pose: Pose, state: DriverState):
    counter["model"] += 1
    write_pdb_model(pose, handle, counter["model"])

  return Callback(write, frequency)
