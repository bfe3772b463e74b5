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

"""Stochastic meta-ascent (SMA) over batches of instances."""

from collections.abc import Sequence
import dataclasses
import math
from typing import Optional

from absl import logging
import numpy as np

from lincrf import optimizables
from lincrf import optimizers


@dataclasses.dataclass(frozen=True)
class SMAConfig:
  """Configuration of StochasticMetaAscent.

  Attributes:
    max_iterations: Default number of passes over the batches.
    lam: Decay of the gradient trace.
    tolerance: Relative value change for convergence.
    eps: Added to the value magnitudes in the convergence test.
    mu: Meta step size, adapting the per-parameter gains.
    initial_step: Initial gain of every parameter.
    use_hessian: Whether to use a finite difference Hessian-vector product in
      the trace update.
    hessian_eps: Finite difference step of the Hessian-vector product.
  """
  max_iterations: int = 200
  lam: float = 1.0
  tolerance: float = 0.01
  eps: float = 1e-10
  mu: float = 0.1
  initial_step: float = 0.03
  use_hessian: bool = True
  hessian_eps: float = 1e-6


class StochasticMetaAscent(optimizers.Optimizer):
  """Per-parameter adaptive gradient steps, one batch at a time.

  Every parameter has its own gain, which grows while successive gradients
  agree with the trace of past updates and shrinks when they don't. Gains and
  traces persist across optimize() calls.
  """

  def __init__(self,
               optimizable: optimizables.BatchGradientValueOptimizable,
               config: SMAConfig = SMAConfig()):
    super().__init__(optimizable)
    self.config = config
    self.gain = None
    self.gradient_trace = None

  def _hessian_product(self, parameters: np.ndarray, batch: int,
                       assignments: Sequence[tuple[int, int]],
                       gradient: np.ndarray,
                       vector: np.ndarray) -> np.ndarray:
    """Finite difference product of the Hessian with `vector`.

    Args:
      parameters: Current parameters.
      batch: Batch index.
      assignments: Instance ranges of all batches.
      gradient: Negated batch gradient at `parameters`.
      vector: Vector to multiply.

    Returns:
      Product of the Hessian of the negated batch value with `vector`.
    """
    eps = self.config.hessian_eps
    self.optimizable.set_parameters(parameters + eps * vector)
    eps_gradient = self.optimizable.batch_value_gradient(batch, assignments)
    self.optimizable.set_parameters(parameters)
    return (-eps_gradient - gradient) / eps

  def optimize(
      self,
      num_iterations: Optional[int] = None,
      assignments: Optional[Sequence[tuple[int, int]]] = None) -> bool:
    """Runs passes over the batches.

    Args:
      num_iterations: Number of passes. Defaults to config.max_iterations.
      assignments: (start, end) instance range of each batch. Required.

    Returns:
      True if the value summed over a pass converged.
    """
    if assignments is None:
      raise ValueError('StochasticMetaAscent needs batch assignments')
    config = self.config
    if num_iterations is None:
      num_iterations = config.max_iterations
    num_parameters = self.optimizable.num_parameters()
    if self.gain is None:
      logging.info('StochasticMetaAscent: initial step = %s, meta step = %s',
                   config.initial_step, config.mu)
      self.gain = np.full([num_parameters], config.initial_step)
      self.gradient_trace = np.zeros([num_parameters])
    self.status = optimizers.Status.ITERATING

    for iteration in range(num_iterations):
      old_approx_value = 0.0
      approx_value = 0.0
      for batch in range(len(assignments)):
        logging.info('Iteration %d, batch %d of %d',
                     self.iterations + iteration, batch, len(assignments))
        parameters = self.optimizable.parameters()
        initial_value = self.optimizable.batch_value(batch, assignments)
        if math.isnan(initial_value):
          raise ValueError(
              'NaN in value computation. Probably the initial step or the '
              'meta step is too large.')
        old_approx_value += initial_value
        # Descent formulation: flip the gradient to point downhill.
        gradient = -self.optimizable.batch_value_gradient(batch, assignments)
        if config.use_hessian:
          hessian_product = self._hessian_product(parameters, batch,
                                                  assignments, gradient,
                                                  self.gradient_trace)
        else:
          hessian_product = self.gradient_trace

        self.gain *= np.maximum(
            0.5, 1 - config.mu * gradient * self.gradient_trace)
        parameters = parameters - self.gain * gradient
        self.gradient_trace = (
            config.lam * self.gradient_trace - self.gain *
            (gradient + config.lam * hessian_product))
        self.optimizable.set_parameters(parameters)

        final_value = self.optimizable.batch_value(batch, assignments)
        approx_value += final_value
        logging.info('StochasticMetaAscent: initial value %s, final value %s',
                     initial_value, final_value)

      logging.info('StochasticMetaAscent: value at iteration %d = %s',
                   self.iterations + iteration, approx_value)
      if optimizers.values_converged(approx_value, old_approx_value,
                                     config.tolerance, config.eps):
        self.iterations += iteration + 1
        return self._converged(
            'StochasticMetaAscent: value difference %s below tolerance; '
            'saying converged.', abs(approx_value - old_approx_value))
    self.iterations += num_iterations
    return False
