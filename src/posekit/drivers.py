"""
Driver loops that repeatedly edit and evaluate a pose: a Monte Carlo
sampler with annealing acceptance and a cartesian steepest descent
minimiser (also used as the loop closer of block rotations).
"""

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np
from tqdm import tqdm

from posekit.energy import Evaluator
from posekit.log import logger
from posekit.pose import Pose


### CLASSES ###
class DriverStatus(Enum):
  IDLE = "idle"
  RUNNING = "running"
  CONVERGED = "converged"
  STEP_LIMIT_REACHED = "step_limit_reached"
  FAILED = "failed"


@dataclass
class DriverState:
  """Progress of a driver run, handed to every callback.

  Attributes:
    step: Current step (0 before the first step)
    status: Current status
    energy: Energy of the current (accepted) pose
    components: Weighted energy components of the current pose, by name
    temperature: Temperature of the current step (Monte Carlo only)
    acceptance_count: Accepted steps so far
    step_size: Current step size (steepest descent only)
    max_force: Largest per-atom force norm of the last evaluation
    message: Reason for the final status
  """
  step: int = 0
  status: DriverStatus = DriverStatus.IDLE
  energy: float = math.inf
  components: Dict[str, float] = field(default_factory=dict)
  temperature: float = 0.0
  acceptance_count: int = 0
  step_size: float = 0.0
  max_force: float = math.inf
  message: str = ""

  @property
  def acceptance_rate(self) -> float:
    return self.acceptance_count / self.step if self.step else 0.0

  @property
  def finished(self) -> bool:
    return self.status in (DriverStatus.CONVERGED, DriverStatus.STEP_LIMIT_REACHED, DriverStatus.FAILED)


@dataclass
class Callback:
  """A side effect run every ``frequency`` steps with ``(pose, driver_state)``.

  Return values are ignored. ``frequency <= 0`` only fires at the end of a run.
  """
  event: Callable[[Pose, DriverState], None]
  frequency: int = 1

  def __call__(self, pose: Pose, state: DriverState, final: bool = False):
    if final or (self.frequency > 0 and state.step % self.frequency == 0):
      self.event(pose, state)


class Sampler:
  def __init__(self, mutators: Sequence[Callable], weights: Optional[Sequence[float]] = None, rng=None):
    """A collection of mutators applied as one Monte Carlo move.

    Without weights every mutator runs in order. With weights a single
    mutator is drawn per move with the given relative probabilities.

    Parameters:
      mutators: Mutators, callables ``mutator(pose) -> MutationOutcome``
      weights: Relative selection weights, one per mutator
      rng: ``numpy.random.Generator``, seed or ``None``

    Raises:
      ValueError: on empty mutators or mismatched/invalid weights
    """
    if not mutators:
      raise ValueError("A sampler needs at least one mutator.")
    self.mutators = list(mutators)
    self.weights = None
    if weights is not None:
      weights = np.asarray(weights, dtype=float)
      if len(weights) != len(self.mutators) or (weights < 0).any() or weights.sum() <= 0:
        raise ValueError(f"Expected {len(self.mutators)} non-negative weights with a positive sum, got {weights.tolist()}.")
      self.weights = weights / weights.sum()
    self.rng = np.random.default_rng(rng)

  def __call__(self, pose: Pose):
    if self.weights is not None:
      return self.mutators[self.rng.choice(len(self.mutators), p=self.weights)](pose)
    outcome = None
    for mutator in self.mutators:
      result = mutator(pose)
      outcome = result if outcome is None else outcome.merge(result)
      if outcome.failed:
        break
    return outcome


class SteepestDescent:
  def __init__(
    self,
    evaluator: Evaluator,
    n_steps: int = 100,
    f_tol: float = 1e-3,
    max_step: float = 0.1,
    min_step: float = 1e-8,
    callbacks: Optional[List[Callback]] = None,
  ):
    """Cartesian steepest descent with an adaptive step size.

    Every step moves all atoms along the forces so that the most loaded atom
    moves ``step_size`` Angstrom. Strictly lower energy grows the step by 20% (capped
    at ``max_step``), higher energy rejects the move and halves the step.

    Parameters:
      evaluator: Energy with forces
      n_steps: Maximum number of steps
      f_tol: Converged once the largest atomic force drops below this value
      max_step: Largest displacement per step in Angstrom
      min_step: The run fails once the step size shrinks below this value
      callbacks: Hooks run during the loop

    Raises:
      ValueError: on non-positive limits
    """
    if n_steps < 1 or max_step <= 0 or f_tol <= 0:
      raise ValueError(f"Invalid steepest descent settings: n_steps={n_steps}, max_step={max_step}, f_tol={f_tol}.")
    self.evaluator = evaluator
    self.n_steps = n_steps
    self.f_tol = f_tol
    self.max_step = max_step
    self.min_step = min_step
    self.callbacks = list(callbacks or [])

  def run(self, pose: Pose) -> DriverState:
    """Minimise ``pose`` in place. Leaves a c2i pending.

    Returns:
      Final driver state
    """
    state = DriverState(status=DriverStatus.RUNNING, step_size=self.max_step)
    energy = self.evaluator(pose, forces=True)
    state.energy = energy.total
    state.components = dict(energy.components)
    state.max_force = _max_force(energy.forces)
    while state.status == DriverStatus.RUNNING:
      if not np.isfinite(state.energy):
        state.status, state.message = DriverStatus.FAILED, "energy is not finite"
      elif state.max_force < self.f_tol:
        state.status, state.message = DriverStatus.CONVERGED, f"max force {state.max_force:.3g} < {self.f_tol}"
      elif state.step >= self.n_steps:
        state.status, state.message = DriverStatus.STEP_LIMIT_REACHED, f"{self.n_steps} steps"
      elif state.step_size < self.min_step:
        state.status, state.message = DriverStatus.FAILED, "step size collapsed"
      if state.status != DriverStatus.RUNNING:
        break

      state.step += 1
      previous = pose.coords.copy()
      pose.state.set_coords(previous + state.step_size * energy.forces / state.max_force)
      trial = self.evaluator(pose, forces=True)
      if trial.total < state.energy:
        energy = trial
        state.energy = trial.total
        state.components = dict(trial.components)
        state.max_force = _max_force(trial.forces)
        state.acceptance_count += 1
        state.step_size = min(state.step_size * 1.2, self.max_step)
      else:
        pose.state.set_coords(previous)
        state.step_size *= 0.5
      for callback in self.callbacks:
        callback(pose, state)

    for callback in self.callbacks:
      callback(pose, state, final=True)
    logger.debug(f"Steepest descent {state.status.value} after {state.step} steps ({state.message}), E={state.energy:.3f}")
    return state


class MonteCarlo:
  def __init__(
    self,
    evaluator: Evaluator,
    sampler: Callable,
    temperature: Optional[Callable[[int], float]] = None,
    n_steps: int = 1000,
    callbacks: Optional[List[Callback]] = None,
    kb: float = 1.0,
    stop_energy: Optional[float] = None,
    on_mutator_failure: str = "reject",
    rng=None,
    progress: bool = False,
  ):
    """Metropolis Monte Carlo driver.

    Every step snapshots the pose, applies the sampler, evaluates the new
    energy and accepts or reverts with the annealing rule.

    Parameters:
      evaluator: Energy function
      sampler: Move applied each step, ``sampler(pose) -> MutationOutcome``
      temperature: Schedule mapping the step (1-based) to a temperature,
        defaults to a constant temperature of 1
      n_steps: Number of steps
      callbacks: Hooks run during the loop
      kb: Boltzmann constant in the energy unit
      stop_energy: Converge as soon as the accepted energy drops to this value
      on_mutator_failure: ``"reject"`` reverts a failed move and continues,
        ``"abort"`` reverts it and stops the run as failed
      rng: ``numpy.random.Generator``, seed or ``None``
      progress: Show a tqdm progress bar

    Raises:
      ValueError: on invalid settings
    """
    if n_steps < 1:
      raise ValueError(f"n_steps must be positive, got {n_steps}.")
    if on_mutator_failure not in ("reject", "abort"):
      raise ValueError(f'on_mutator_failure must be "reject" or "abort", got "{on_mutator_failure}".')
    if kb <= 0:
      raise ValueError(f"kb must be positive, got {kb}.")
    self.evaluator = evaluator
    self.sampler = sampler
    self.temperature = temperature or constant_temperature(1.0)
    self.n_steps = n_steps
    self.callbacks = list(callbacks or [])
    self.kb = kb
    self.stop_energy = stop_energy
    self.on_mutator_failure = on_mutator_failure
    self.rng = np.random.default_rng(rng)
    self.progress = progress

  def _converged(self, state: DriverState) -> bool:
    """Mark ``state`` converged if the stop energy is reached."""
    if self.stop_energy is None or state.energy > self.stop_energy:
      return False
    state.status, state.message = DriverStatus.CONVERGED, f"energy {state.energy:.3f} <= {self.stop_energy}"
    return True

  def run(self, pose: Pose) -> DriverState:
    """Sample ``pose`` in place, it ends up in the last accepted conformation.

    Returns:
      Final driver state
    """
    state = DriverState(status=DriverStatus.RUNNING)
    energy = self.evaluator(pose)
    state.energy = energy.total
    state.components = dict(energy.components)
    logger.info(f"Monte Carlo start: {self.n_steps} steps, E={state.energy:.3f}")
    steps = range(1, self.n_steps + 1) if not self._converged(state) else range(0)
    for step in tqdm(steps, disable=not self.progress, desc="Monte Carlo", unit="step"):
      state.step = step
      state.temperature = self.temperature(step)
      pose.sync()
      snapshot = pose.copy()
      outcome = self.sampler(pose)
      if outcome is not None and outcome.failed:
        pose.restore(snapshot)
        logger.debug(f"Step {step}: move failed ({outcome.message}), reverted")
        if self.on_mutator_failure == "abort":
          state.status, state.message = DriverStatus.FAILED, f"move failed at step {step}: {outcome.message}"
          break
      else:
        energy = self.evaluator(pose)
        if metropolis(energy.total - state.energy, state.temperature, self.rng, self.kb):
          state.energy = energy.total
          state.components = dict(energy.components)
          state.acceptance_count += 1
        else:
          pose.restore(snapshot)
      for callback in self.callbacks:
        callback(pose, state)
      if self._converged(state):
        break
    else:
      if not self._converged(state):
        state.status, state.message = DriverStatus.STEP_LIMIT_REACHED, f"{self.n_steps} steps"

    for callback in self.callbacks:
      callback(pose, state, final=True)
    log = logger.error if state.status == DriverStatus.FAILED else logger.info
    log(f"Monte Carlo {state.status.value} after {state.step} steps ({state.message}), E={state.energy:.3f}, acceptance={state.acceptance_rate:.2f}")
    return state


### FUNCTIONS ###
def _max_force(forces: np.ndarray) -> float:
  if forces is None or not len(forces):
    return 0.0
  return float(np.linalg.norm(forces, axis=1).max())


def constant_temperature(t: float) -> Callable[[int], float]:
  """Schedule returning ``t`` at every step."""
  return lambda step: t


def linear_quench(t0: float, n_steps: int, t1: float = 0.0) -> Callable[[int], float]:
  """Schedule decreasing linearly from ``t0`` at step 1 to ``t1`` at step ``n_steps``."""
  if n_steps < 1:
    raise ValueError(f"n_steps must be positive, got {n_steps}.")

  def schedule(step: int) -> float:
    frac = min(max(step - 1, 0) / max(n_steps - 1, 1), 1.0)
    return t0 + (t1 - t0) * frac

  return schedule


def exponential_quench(t0: float, decay: float = 0.99) -> Callable[[int], float]:
  """Schedule ``t0 * decay**(step - 1)``."""
  if not 0 < decay <= 1:
    raise ValueError(f"decay must lie in (0, 1], got {decay}.")
  return lambda step: t0 * decay ** max(step - 1, 0)


def acceptance_probability(delta_e: float, temperature: float, kb: float = 1.0) -> float:
  """Metropolis acceptance probability.

  Parameters:
    delta_e: New energy minus current energy
    temperature: Current temperature
    kb: Boltzmann constant

  Returns:
    1 for ``delta_e <= 0``, 0 for an uphill move at ``temperature <= 0``,
    otherwise ``exp(-delta_e / (kb * temperature))``
  """
  if not np.isfinite(delta_e):
    return 0.0 if delta_e > 0 or np.isnan(delta_e) else 1.0
  if delta_e <= 0:
    return 1.0
  if temperature <= 0:
    return 0.0
  return math.exp(-delta_e / (kb * temperature))


def metropolis(delta_e: float, temperature: float, rng: np.random.Generator, kb: float = 1.0) -> bool:
  """Decide acceptance of a move with one random draw."""
  p = acceptance_probability(delta_e, temperature, kb)
  if p >= 1.0:
    return True
  return bool(rng.random() < p)
