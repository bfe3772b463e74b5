# Copyright 2026 The LinCRF Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Gradient-based maximizers over flat parameter vectors.

All optimizers maximize a `GradientValueOptimizable` in place. They move
through the states of `Status`: a line search that cannot improve the value
resets the optimizer and reports Status.FAILED, and running out of iterations
reports Status.ITERATION_LIMIT_REACHED, which counts as success.
"""

import abc
import dataclasses
import enum
import math
from typing import Optional

from absl import logging
import numpy as np

from lincrf import optimizables


class Status(enum.Enum):
  UNINITIALIZED = 'uninitialized'
  ITERATING = 'iterating'
  CONVERGED = 'converged'
  FAILED = 'failed'
  ITERATION_LIMIT_REACHED = 'iteration limit reached'


class OptimizationError(Exception):
  """Optimization could not proceed."""


class InvalidOptimizableError(OptimizationError):
  """The value and gradient of an optimizable are inconsistent."""


def values_converged(value: float, old_value: float, tolerance: float,
                     eps: float) -> bool:
  """Relative change test on objective values."""
  return 2.0 * abs(value - old_value) <= tolerance * (
      abs(value) + abs(old_value) + eps)


def difference(new: np.ndarray, old: np.ndarray) -> np.ndarray:
  """new - old, with 0 where both are infinite with the same sign."""
  same_infinity = np.isinf(new) & np.isinf(old) & (new * old > 0)
  with np.errstate(invalid='ignore'):
    return np.where(same_infinity, 0.0, new - old)


class CorrectionHistory:
  """Ring buffer of the last `capacity` quasi-Newton correction pairs.

  Index 0 is the oldest stored pair.
  """

  def __init__(self, capacity: int, num_parameters: int):
    if capacity < 1:
      raise ValueError(f'capacity should be positive, got {capacity}')
    self._s = np.zeros([capacity, num_parameters])
    self._y = np.zeros([capacity, num_parameters])
    self._rho = np.zeros([capacity])
    self._start = 0
    self._size = 0

  @property
  def capacity(self) -> int:
    return self._rho.shape[0]

  def __len__(self) -> int:
    return self._size

  def __getitem__(self, i: int) -> tuple[np.ndarray, np.ndarray, float]:
    if not 0 <= i < self._size:
      raise IndexError(f'Index {i} is out of range [0, {self._size})')
    k = (self._start + i) % self.capacity
    return self._s[k], self._y[k], float(self._rho[k])

  def push(self, s: np.ndarray, y: np.ndarray, rho: float) -> None:
    """Stores a pair, dropping the oldest one when full."""
    if self._size == self.capacity:
      k = self._start
      self._start = (self._start + 1) % self.capacity
    else:
      k = (self._start + self._size) % self.capacity
      self._size += 1
    self._s[k] = s
    self._y[k] = y
    self._rho[k] = rho

  def clear(self) -> None:
    self._start = 0
    self._size = 0


@dataclasses.dataclass(frozen=True)
class LineSearchConfig:
  """Configuration of BackTrackLineSearch.

  Attributes:
    max_iterations: Maximum number of backtracking steps.
    stpmax: Maximum 2-norm of the search direction; longer directions are
      scaled down.
    rel_tolx: Minimum step relative to the parameter magnitudes.
    abs_tolx: The search gives up when no parameter moves by more than this.
    alf: Sufficient increase constant.
  """
  max_iterations: int = 100
  stpmax: float = 100.0
  rel_tolx: float = 1e-7
  abs_tolx: float = 1e-4
  alf: float = 1e-4


class BackTrackLineSearch:
  """Backtracking line search with quadratic and cubic interpolation.

  Tries the full step along the search direction first, then shrinks the step
  until the sufficient increase condition holds, using the interpolated
  maximum of the values seen so far.
  """

  def __init__(self,
               optimizable: optimizables.GradientValueOptimizable,
               config: LineSearchConfig = LineSearchConfig()):
    self.optimizable = optimizable
    self.config = config

  def _small_abs_diff(self, x: np.ndarray, old: np.ndarray) -> bool:
    return bool(np.all(np.abs(x - old) <= self.config.abs_tolx))

  def optimize(self, line: np.ndarray) -> float:
    """Searches along `line` and leaves the optimizable at the new point.

    Args:
      line: Search direction. Must have a positive slope.

    Returns:
      The accepted step as a fraction of `line`, or 0 if no acceptable step
      was found. In that case the parameters are restored.

    Raises:
      InvalidOptimizableError: If the slope along `line` isn't positive.
      OptimizationError: If the step didn't converge in max_iterations.
    """
    config = self.config
    line = np.array(line, dtype=np.float64)
    x = self.optimizable.parameters()
    old_parameters = x.copy()
    g = self.optimizable.value_gradient()
    f2 = fold = self.optimizable.value()
    logging.debug('Entering backtracking line search, value=%s', fold)
    if np.any(np.isnan(g)):
      raise InvalidOptimizableError(f'NaN in gradient at value {fold}')

    norm = float(np.linalg.norm(line))
    if norm > config.stpmax:
      logging.warning('Attempted step too big, scaling: sum=%s, stpmax=%s',
                      norm, config.stpmax)
      line *= config.stpmax / norm

    slope = float(np.dot(g, line))
    if slope < 0:
      raise InvalidOptimizableError(f'Slope = {slope} is negative')
    if slope == 0:
      raise InvalidOptimizableError(f'Slope = {slope} is zero')

    test = float(
        np.max(np.abs(line) / np.maximum(np.abs(old_parameters), 1.0),
               initial=0.0))
    alamin = config.rel_tolx / test
    alam = 1.0
    old_alam = 0.0
    alam2 = tmplam = 0.0
    for iteration in range(config.max_iterations):
      logging.debug('Backtracking iteration %d: alam=%s old_alam=%s',
                    iteration, alam, old_alam)
      x += (alam - old_alam) * line
      if alam < alamin or self._small_abs_diff(x, old_parameters):
        self.optimizable.set_parameters(old_parameters)
        logging.warning(
            'Exiting backtracking: jump too small (alamin=%s). Using the old '
            'parameters, value=%s', alamin, self.optimizable.value())
        return 0.0

      self.optimizable.set_parameters(x)
      old_alam = alam
      f = self.optimizable.value()
      logging.debug('value=%s', f)

      if f >= fold + config.alf * alam * slope:
        logging.debug('Exiting backtracking: value=%s', f)
        return alam
      elif math.isinf(f) or math.isinf(f2):
        logging.warning(
            'Value is infinite after jump %s, f=%s, f2=%s. Scaling back step '
            'size.', old_alam, f, f2)
        tmplam = 0.2 * alam
      elif alam == 1.0:
        # First backtrack: maximum of the quadratic through fold, slope and f.
        tmplam = -slope / (2.0 * (f - fold - slope))
      else:
        rhs1 = f - fold - alam * slope
        rhs2 = f2 - fold - alam2 * slope
        a = (rhs1 / (alam * alam) - rhs2 / (alam2 * alam2)) / (alam - alam2)
        b = (-alam2 * rhs1 / (alam * alam) + alam * rhs2 /
             (alam2 * alam2)) / (alam - alam2)
        if a == 0.0:
          tmplam = -slope / (2.0 * b)
        else:
          disc = b * b - 3.0 * a * slope
          if disc < 0.0:
            tmplam = 0.5 * alam
          elif b <= 0.0:
            tmplam = (-b + math.sqrt(disc)) / (3.0 * a)
          else:
            tmplam = -slope / (b + math.sqrt(disc))
        tmplam = min(tmplam, 0.5 * alam)
      alam2 = alam
      f2 = f
      logging.debug('tmplam=%s', tmplam)
      alam = max(tmplam, 0.1 * alam)
    raise OptimizationError(
        f'Line search took more than {config.max_iterations} iterations')


class Optimizer(abc.ABC):
  """Maximizes an optimizable in place."""

  def __init__(self, optimizable: optimizables.GradientValueOptimizable):
    self.optimizable = optimizable
    self.status = Status.UNINITIALIZED
    self.iterations = 0

  @property
  def is_converged(self) -> bool:
    return self.status in (Status.CONVERGED, Status.ITERATION_LIMIT_REACHED)

  @abc.abstractmethod
  def optimize(self, num_iterations: Optional[int] = None) -> bool:
    """Runs at most `num_iterations` iterations.

    Args:
      num_iterations: Iteration budget of this call. Unlimited if None, in
        which case the optimizer runs until it converges, fails or reaches its
        own iteration limit.

    Returns:
      True if the optimizer converged or reached its iteration limit, False if
      it failed or ran out of `num_iterations`.
    """

  def _iteration_limit_reached(self, name: str) -> bool:
    logging.warning('Too many iterations in %s. Continuing with current '
                    'parameters.', name)
    self.status = Status.ITERATION_LIMIT_REACHED
    return True

  def _converged(self, message: str, *args) -> bool:
    logging.info(message, *args)
    self.status = Status.CONVERGED
    return True


@dataclasses.dataclass(frozen=True)
class GradientAscentConfig:
  initial_step: float = 0.2
  tolerance: float = 1e-3
  max_iterations: int = 200
  stpmax: float = 100.0
  eps: float = 1e-10


class GradientAscent(Optimizer):
  """Steepest ascent with a backtracking line search."""

  def __init__(self,
               optimizable: optimizables.GradientValueOptimizable,
               config: GradientAscentConfig = GradientAscentConfig(),
               line_search_config: LineSearchConfig = LineSearchConfig()):
    super().__init__(optimizable)
    self.config = config
    self.step = config.initial_step
    self.line_search = BackTrackLineSearch(optimizable, line_search_config)

  def optimize(self, num_iterations: Optional[int] = None) -> bool:
    config = self.config
    self.status = Status.ITERATING
    fp = self.optimizable.value()
    xi = self.optimizable.value_gradient()
    iteration_count = 0
    while num_iterations is None or iteration_count < num_iterations:
      logging.info(
          'At iteration %d, value = %s, step = %s, gradient infinity norm = %s',
          self.iterations, fp, self.step, np.max(np.abs(xi), initial=0.0))
      norm = float(np.linalg.norm(xi))
      if norm > config.stpmax:
        logging.info('Step 2-norm %s greater than max %s, scaling.', norm,
                     config.stpmax)
        xi = xi * (config.stpmax / norm)
      self.step = self.line_search.optimize(xi)
      fret = self.optimizable.value()
      if values_converged(fret, fp, config.tolerance, config.eps):
        return self._converged(
            'Gradient ascent: value difference %s below tolerance; saying '
            'converged.', abs(fret - fp))
      fp = fret
      xi = self.optimizable.value_gradient()
      self.iterations += 1
      iteration_count += 1
      if self.iterations >= config.max_iterations:
        return self._iteration_limit_reached('GradientAscent')
    return False


@dataclasses.dataclass(frozen=True)
class ConjugateGradientConfig:
  initial_step: float = 0.01
  tolerance: float = 1e-4
  max_iterations: int = 1000
  eps: float = 1e-10


class ConjugateGradient(Optimizer):
  """Nonlinear conjugate gradient with Polak-Ribiere directions.

  Whenever the line search can't step along a conjugate direction, or that
  direction doesn't point uphill, the search restarts from the gradient. Not
  being able to step along the gradient means convergence.
  """

  def __init__(
      self,
      optimizable: optimizables.GradientValueOptimizable,
      config: ConjugateGradientConfig = ConjugateGradientConfig(),
      line_search_config: LineSearchConfig = LineSearchConfig()):
    super().__init__(optimizable)
    self.config = config
    self.step = config.initial_step
    self.line_search = BackTrackLineSearch(optimizable, line_search_config)
    self._xi = None

  def reset(self) -> None:
    self._xi = None

  def _restart_from_gradient(self) -> None:
    self._fp = self.optimizable.value()
    self._xi = self.optimizable.value_gradient()
    self._g = self._xi.copy()
    self._h = self._xi.copy()

  def optimize(self, num_iterations: Optional[int] = None) -> bool:
    if self.status == Status.CONVERGED:
      return True
    config = self.config
    searching_gradient = True
    if self._xi is None:
      self._restart_from_gradient()
      self.step = config.initial_step
      self.iterations = 0
    self.status = Status.ITERATING

    iteration_count = 0
    while num_iterations is None or iteration_count < num_iterations:
      iteration_count += 1
      logging.info('Conjugate gradient: at iteration %d, value = %s',
                   self.iterations, self._fp)
      if not searching_gradient and np.dot(
          self._xi, self.optimizable.value_gradient()) <= 0:
        logging.info('Conjugate direction does not point uphill. Resetting '
                     'to the gradient.')
        self._restart_from_gradient()
        searching_gradient = True
      self.step = self.line_search.optimize(self._xi)
      if self.step == 0:
        if searching_gradient:
          return self._converged(
              'Conjugate gradient converged: line search got step 0 in the '
              'gradient direction. Gradient abs norm = %s',
              np.sum(np.abs(self._xi)))
        logging.info('Line search got step 0. Resetting to the gradient.')
        self._restart_from_gradient()
        searching_gradient = True
        continue

      fret = self.optimizable.value()
      if values_converged(fret, self._fp, config.tolerance, config.eps):
        return self._converged(
            'Conjugate gradient converged: old value = %s, new value = %s',
            self._fp, fret)
      self._fp = fret
      xi = self.optimizable.value_gradient()
      infinity_norm = float(np.max(np.abs(xi), initial=0.0))
      logging.info('Gradient infinity norm = %s', infinity_norm)
      if infinity_norm < config.tolerance:
        self._xi = xi
        return self._converged(
            'Conjugate gradient converged: maximum gradient component %s less '
            'than %s', infinity_norm, config.tolerance)

      gg = float(np.dot(self._g, self._g))
      if gg == 0.0:
        self._xi = xi
        return self._converged(
            'Conjugate gradient converged: gradient is exactly zero.')
      dgg = float(np.dot(xi - self._g, xi))
      gam = dgg / gg
      self._g = xi
      self._h = xi + gam * self._h
      self._xi = self._h.copy()
      searching_gradient = False

      self.iterations += 1
      if self.iterations > config.max_iterations:
        return self._iteration_limit_reached('ConjugateGradient')
    return False


@dataclasses.dataclass(frozen=True)
class LBFGSConfig:
  """Configuration of LimitedMemoryBFGS.

  Attributes:
    memory: Number of stored correction pairs.
    tolerance: Relative value change for convergence.
    gradient_tolerance: Gradient 2-norm for convergence.
    eps: Added to the value magnitudes in the convergence test.
    max_iterations: Iteration limit.
  """
  memory: int = 4
  tolerance: float = 1e-4
  gradient_tolerance: float = 1e-3
  eps: float = 1e-5
  max_iterations: int = 1000


class LimitedMemoryBFGS(Optimizer):
  """Limited memory BFGS, maximizing.

  The inverse Hessian is approximated from the last `memory` pairs of
  parameter and gradient changes (s, y) with the two-loop recursion. For a
  concave objective s.y <= 0 always holds; a positive s.y means the gradient
  is inconsistent with the value and raises InvalidOptimizableError.
  """

  def __init__(self,
               optimizable: optimizables.GradientValueOptimizable,
               config: LBFGSConfig = LBFGSConfig(),
               line_search_config: LineSearchConfig = LineSearchConfig()):
    super().__init__(optimizable)
    self.config = config
    self.line_search = BackTrackLineSearch(optimizable, line_search_config)
    self._g = None

  def reset(self) -> None:
    """Forgets the curvature history."""
    self._g = None

  def _line_search(self, direction: np.ndarray) -> bool:
    step = self.line_search.optimize(direction)
    if step == 0.0:
      logging.warning('L-BFGS could not step in the current direction; '
                      'resetting.')
      self.reset()
      self.status = Status.FAILED
      return False
    self._parameters = self.optimizable.parameters()
    self._g = self.optimizable.value_gradient()
    return True

  def _direction(self) -> np.ndarray:
    """Ascent direction from the two-loop recursion."""
    history = self._history
    direction = self._g.copy()
    alphas = np.zeros([len(history)])
    for i in reversed(range(len(history))):
      s, y, rho = history[i]
      alphas[i] = rho * np.dot(s, direction)
      direction -= alphas[i] * y
    direction *= self._gamma
    for i in range(len(history)):
      s, y, rho = history[i]
      beta = rho * np.dot(y, direction)
      direction += (alphas[i] - beta) * s
    return -direction

  def optimize(self, num_iterations: Optional[int] = None) -> bool:
    config = self.config
    initial_value = self.optimizable.value()
    logging.debug('Entering L-BFGS optimize, initial value = %s',
                  initial_value)

    if self._g is None:
      logging.debug('First time through L-BFGS')
      self.iterations = 0
      self._history = CorrectionHistory(config.memory,
                                        self.optimizable.num_parameters())
      self._parameters = self.optimizable.parameters()
      self._old_parameters = self._parameters.copy()
      self._g = self.optimizable.value_gradient()
      self._old_g = self._g.copy()
      direction = self._g.copy()
      if np.sum(np.abs(direction)) == 0:
        self._g = None
        return self._converged(
            'L-BFGS initial gradient is zero; saying converged')
      direction /= np.linalg.norm(direction)
      self.status = Status.ITERATING
      if not self._line_search(direction):
        return False
    self.status = Status.ITERATING

    iteration_count = 0
    while num_iterations is None or iteration_count < num_iterations:
      iteration_count += 1
      value = self.optimizable.value()
      logging.debug('L-BFGS iteration %d, value = %s, gradient 2-norm = %s',
                    self.iterations, value, np.linalg.norm(self._g))
      s = difference(self._parameters, self._old_parameters)
      y = difference(self._g, self._old_g)
      sy = float(np.dot(s, y))
      yy = float(np.dot(y, y))
      if sy > 0:
        raise InvalidOptimizableError(f'sy = {sy} > 0')
      if sy == 0 or yy == 0:
        raise InvalidOptimizableError(
            f'Degenerate curvature pair: sy = {sy}, yy = {yy}')
      self._gamma = sy / yy
      if self._gamma > 0:
        raise InvalidOptimizableError(f'gamma = {self._gamma} > 0')
      self._history.push(s, y, 1.0 / sy)
      direction = self._direction()

      self._old_parameters = self._parameters.copy()
      self._old_g = self._g.copy()
      logging.debug('Before line search: direction.gradient = %s',
                    np.dot(direction, self._g))
      if not self._line_search(direction):
        return False
      new_value = self.optimizable.value()

      if values_converged(new_value, value, config.tolerance, config.eps):
        return self._converged(
            'Exiting L-BFGS on termination #1: value difference below '
            'tolerance (old value: %s, new value: %s)', value, new_value)
      gg = float(np.linalg.norm(self._g))
      if gg < config.gradient_tolerance:
        return self._converged(
            'Exiting L-BFGS on termination #2: gradient = %s < %s', gg,
            config.gradient_tolerance)
      if gg == 0.0:
        return self._converged(
            'Exiting L-BFGS on termination #3: gradient == 0.0')
      logging.debug('Gradient = %s', gg)
      self.iterations += 1
      if self.iterations > config.max_iterations:
        return self._iteration_limit_reached('L-BFGS')
    return False
