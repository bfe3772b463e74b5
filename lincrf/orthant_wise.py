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

"""Orthant-wise limited memory quasi-Newton (OWL-QN) for L1 regularization.

Maximizes value(w) - l1_weight * |w|_1, internally minimizing its negation.
The L1 term isn't differentiable at 0, so the search uses a pseudo-gradient
and keeps every step inside the orthant it starts from: coordinates that
would change sign are clamped to exactly 0. This is what makes the solution
sparse.
"""

import dataclasses
from typing import Optional

from absl import logging
import numpy as np

from lincrf import optimizables
from lincrf import optimizers


@dataclasses.dataclass(frozen=True)
class OWLQNConfig:
  """Configuration of OrthantWiseLBFGS.

  Attributes:
    l1_weight: Weight of the L1 penalty.
    memory: Number of stored correction pairs.
    tolerance: Relative value change for convergence.
    gradient_tolerance: Gradient 2-norm for convergence.
    eps: Added to the value magnitudes in the convergence test.
    max_iterations: Iteration limit.
    c1: Sufficient decrease constant of the line search.
    backoff: Step shrinking factor of the line search.
    first_backoff: Step shrinking factor during the first iteration, where the
      search starts from a unit-length step.
    max_line_search_steps: Maximum number of trial steps per line search.
  """
  l1_weight: float = 0.0
  memory: int = 4
  tolerance: float = 1e-4
  gradient_tolerance: float = 1e-3
  eps: float = 1e-5
  max_iterations: int = 1000
  c1: float = 1e-4
  backoff: float = 0.5
  first_backoff: float = 0.1
  max_line_search_steps: int = 50


class OrthantWiseLBFGS(optimizers.Optimizer):
  """OWL-QN over a GradientValueOptimizable.

  Infinite parameters are left alone: they don't count in the L1 penalty and
  their gradient components are treated as 0.
  """

  def __init__(self,
               optimizable: optimizables.GradientValueOptimizable,
               config: OWLQNConfig = OWLQNConfig()):
    super().__init__(optimizable)
    self.config = config
    self.l1_weight = config.l1_weight
    num_parameters = optimizable.num_parameters()
    self._history = optimizers.CorrectionHistory(config.memory,
                                                 num_parameters)
    self._y_dot_y = 0.0
    self.parameters = optimizable.parameters()
    self.value = self._eval_l1()
    self.grad = self._eval_gradient()
    self.old_parameters = self.parameters.copy()
    self.old_grad = self.grad.copy()
    self.old_value = self.value
    self._direction = np.zeros([num_parameters])
    self._steepest_descent_direction = np.zeros([num_parameters])

  def _eval_l1(self) -> float:
    """Value to minimize."""
    value = -self.optimizable.value()
    abs_weight = 0.0
    if self.l1_weight > 0:
      finite = self.parameters[np.isfinite(self.parameters)]
      abs_weight = float(np.sum(np.abs(finite))) * self.l1_weight
    logging.info('OWL-QN value = %s + |w| = %s: %s', value, abs_weight,
                 value + abs_weight)
    return value + abs_weight

  def _eval_gradient(self) -> np.ndarray:
    """Gradient of the value to minimize, without the L1 term."""
    grad = self.optimizable.value_gradient()
    grad = np.where(np.isinf(self.parameters), 0.0, grad)
    return -grad

  def _make_steepest_descent_direction(self) -> None:
    grad = self.grad
    l1 = self.l1_weight
    w = self.parameters
    if l1 == 0:
      direction = -grad
    else:
      at_zero = np.where(grad < -l1, -grad - l1,
                         np.where(grad > l1, -grad + l1, 0.0))
      direction = np.where(w < 0, -grad + l1,
                           np.where(w > 0, -grad - l1, at_zero))
    self._direction = direction
    self._steepest_descent_direction = direction.copy()

  def _map_direction_by_inverse_hessian(self) -> None:
    history = self._history
    if not history:
      return
    direction = self._direction
    alphas = np.zeros([len(history)])
    for i in reversed(range(len(history))):
      s, y, rho = history[i]
      alphas[i] = -np.dot(s, direction) / rho
      direction += alphas[i] * y
    scalar = history[len(history) - 1][2] / self._y_dot_y
    logging.debug('Direction multiplier = %s', scalar)
    direction *= scalar
    for i in range(len(history)):
      s, y, rho = history[i]
      beta = np.dot(y, direction) / rho
      direction += (-alphas[i] - beta) * s

  def _fix_direction_signs(self) -> None:
    if self.l1_weight > 0:
      disagree = self._direction * self._steepest_descent_direction <= 0
      self._direction = np.where(disagree, 0.0, self._direction)

  def _directional_derivative(self) -> float:
    direction = self._direction
    grad = self.grad
    l1 = self.l1_weight
    if l1 == 0:
      return float(np.dot(direction, grad))
    w = self.parameters
    # At w == 0 the L1 subgradient takes the sign of the direction.
    sign = np.where(w != 0, np.sign(w), np.sign(direction))
    return float(np.sum(direction * (grad + l1 * sign)))

  def _next_point(self, alpha: float) -> None:
    parameters = self.old_parameters + self._direction * alpha
    if self.l1_weight > 0:
      parameters = np.where(self.old_parameters * parameters < 0, 0.0,
                            parameters)
    self.parameters = parameters
    self.optimizable.set_parameters(parameters)

  def _line_search(self) -> bool:
    """Armijo backtracking along the direction, within the orthant."""
    config = self.config
    direction_derivative = self._directional_derivative()
    if direction_derivative >= 0:
      raise optimizers.InvalidOptimizableError(
          f'OWL-QN chose a non-descent direction, directional derivative = '
          f'{direction_derivative}: check your gradient!')
    alpha = 1.0
    backoff = config.backoff
    if self.iterations == 0:
      alpha = 1.0 / np.linalg.norm(self._direction)
      backoff = config.first_backoff
    self.old_value = self.value
    logging.debug('Starting line search at iteration %d, value = %s',
                  self.iterations, self.value)
    for _ in range(config.max_line_search_steps):
      self._next_point(alpha)
      self.value = self._eval_l1()
      logging.debug('Iteration %d: alpha = %s, new value = %s',
                    self.iterations, alpha, self.value)
      if self.value <= (
          self.old_value + config.c1 * direction_derivative * alpha):
        return True
      alpha *= backoff
    self.parameters = self.old_parameters.copy()
    self.optimizable.set_parameters(self.parameters)
    self.value = self.old_value
    return False

  def shift(self) -> float:
    """Stores the latest correction pair, returns y.y."""
    s = optimizers.difference(self.parameters, self.old_parameters)
    y = optimizers.difference(self.grad, self.old_grad)
    rho = float(np.dot(s, y))
    y_dot_y = float(np.dot(y, y))
    logging.debug('rho = %s', rho)
    if rho < 0:
      raise optimizers.InvalidOptimizableError(
          f'rho = {rho} < 0: invalid inverse Hessian. The gradient change '
          'should be opposite of the parameter change.')
    self._history.push(s, y, rho)
    self.old_parameters = self.parameters.copy()
    self.old_grad = self.grad.copy()
    return y_dot_y

  def optimize(self, num_iterations: Optional[int] = None) -> bool:
    config = self.config
    logging.debug('Entering OWL-QN optimize, L1 weight = %s, value = %s',
                  self.l1_weight, self.value)
    self.status = optimizers.Status.ITERATING
    iteration_count = 0
    while num_iterations is None or iteration_count < num_iterations:
      iteration_count += 1
      self._make_steepest_descent_direction()
      self._map_direction_by_inverse_hessian()
      self._fix_direction_signs()
      if not np.any(self._direction):
        return self._converged(
            'Exiting OWL-QN: the search direction is zero.')

      self.old_parameters = self.parameters.copy()
      self.old_grad = self.grad.copy()
      if not self._line_search():
        logging.warning('OWL-QN line search failed after %d steps.',
                        config.max_line_search_steps)
        self._history.clear()
        self._y_dot_y = 0.0
        self.status = optimizers.Status.FAILED
        return False

      self.grad = self._eval_gradient()
      if optimizers.values_converged(self.value, self.old_value,
                                     config.tolerance, config.eps):
        return self._converged(
            'Exiting OWL-QN on termination #1: value difference below '
            'tolerance (old value: %s, new value: %s)', self.old_value,
            self.value)
      gradient_norm = float(np.linalg.norm(self.grad))
      if gradient_norm < config.gradient_tolerance:
        return self._converged(
            'Exiting OWL-QN on termination #2: gradient = %s < %s',
            gradient_norm, config.gradient_tolerance)

      self._y_dot_y = self.shift()
      self.iterations += 1
      if self.iterations > config.max_iterations:
        return self._iteration_limit_reached('OWL-QN')
    return False
