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

"""Objective functions over model or auxiliary parameters.

Every objective is maximized. Values and gradients are cached and recomputed
only when the parameters change, as tracked by the model's version stamp.
"""

import abc
from collections.abc import Callable, Sequence
from concurrent import futures
import dataclasses
import math
from typing import NamedTuple, Optional, TypeVar

from absl import logging
import jax
import jax.numpy as jnp
import numpy as np

from lincrf import crfs
from lincrf import ge_constraints
from lincrf import lattices
from lincrf import pr_constraints
from lincrf import transducers

T = TypeVar('T')
R = TypeVar('R')

DEFAULT_GAUSSIAN_PRIOR_VARIANCE = 1.0
DEFAULT_HYPERBOLIC_PRIOR_SLOPE = 0.2
DEFAULT_HYPERBOLIC_PRIOR_SHARPNESS = 10.0


class InvalidValueError(ArithmeticError):
  """An objective value or gradient is NaN or infinite."""


class Optimizable(abc.ABC):
  """Parameters that can be read and updated as a flat vector."""

  @abc.abstractmethod
  def num_parameters(self) -> int:
    pass

  @abc.abstractmethod
  def parameters(self) -> np.ndarray:
    """A copy of the current parameters."""

  @abc.abstractmethod
  def set_parameters(self, parameters: np.ndarray) -> None:
    pass


class GradientValueOptimizable(Optimizable):
  """An objective with a value and a gradient."""

  @abc.abstractmethod
  def value(self) -> float:
    pass

  @abc.abstractmethod
  def value_gradient(self) -> np.ndarray:
    """Gradient of value(), pointing uphill."""


class BatchGradientValueOptimizable(GradientValueOptimizable):
  """An objective that is a sum over batches of instances.

  `assignments` lists the (start, end) instance range of every batch. The
  batch values and gradients sum to value() and value_gradient().
  """

  @abc.abstractmethod
  def batch_value(self, batch: int,
                  assignments: Sequence[tuple[int, int]]) -> float:
    pass

  @abc.abstractmethod
  def batch_value_gradient(
      self, batch: int, assignments: Sequence[tuple[int, int]]) -> np.ndarray:
    pass


@dataclasses.dataclass(frozen=True)
class Instance:
  """A training sequence.

  Attributes:
    inputs: [num_positions, num_features] feature vectors.
    output: Length num_positions output labels, or None when unlabeled.
    weight: Weight of the instance in the objective.
    name: Optional name used in log messages.
  """
  inputs: np.ndarray
  output: Optional[Sequence[int]] = None
  weight: float = 1.0
  name: Optional[str] = None


def contiguous_batches(num_items: int,
                       num_batches: int) -> list[tuple[int, int]]:
  """Splits range(num_items) into at most num_batches contiguous ranges.

  The last range takes the remainder.

  Args:
    num_items: Number of items.
    num_batches: Number of batches.

  Returns:
    (start, end) ranges covering range(num_items) in order.
  """
  if num_batches < 1:
    raise ValueError(f'num_batches should be positive, got {num_batches}')
  num_batches = max(1, min(num_batches, num_items))
  increment = num_items // num_batches
  bounds = [i * increment for i in range(num_batches)] + [num_items]
  return list(zip(bounds[:-1], bounds[1:]))


def run_batches(fn: Callable[[Sequence[T]], R],
                items: Sequence[T],
                num_threads: int = 1) -> list[R]:
  """Applies `fn` to contiguous batches of `items` on a thread pool.

  Each call of `fn` must only write to state it owns, and return it. The
  results come back in batch order so that callers can merge them
  deterministically.

  Args:
    fn: Function of one batch.
    items: Items to split into batches.
    num_threads: Number of worker threads, and of batches.

  Returns:
    Results of `fn` over the batches, in order.
  """
  batches = [
      items[start:end]
      for start, end in contiguous_batches(len(items), num_threads)
  ]
  if len(batches) == 1:
    return [fn(batches[0])]
  with futures.ThreadPoolExecutor(max_workers=len(batches)) as executor:
    return list(executor.map(fn, batches))


def _check_finite(name: str, value: float) -> float:
  if math.isnan(value) or math.isinf(value):
    raise InvalidValueError(f'{name} is {value}')
  return value


def _check_finite_gradient(name: str, gradient: np.ndarray) -> np.ndarray:
  invalid = ~np.isfinite(gradient)
  if np.any(invalid):
    index = int(np.argmax(invalid))
    raise InvalidValueError(
        f'{name} gradient[{index}] is {gradient[index]}')
  return gradient


class _CRFOptimizable(GradientValueOptimizable):
  """Objective over the parameters of a CRF."""

  def __init__(self, crf: crfs.CRF):
    self.crf = crf

  def num_parameters(self) -> int:
    return self.crf.num_parameters()

  def parameters(self) -> np.ndarray:
    return self.crf.parameters()

  def set_parameters(self, parameters: np.ndarray) -> None:
    self.crf.set_parameters(parameters)


class _InstanceResult(NamedTuple):
  index: int
  labeled_weight: float
  unlabeled_weight: float
  constraints: Optional[np.ndarray]
  expectations: Optional[np.ndarray]


class CRFOptimizableByLabelLikelihood(_CRFOptimizable,
                                      BatchGradientValueOptimizable):
  """Conditional log-likelihood of labeled sequences plus a prior.

  The value is

    sum_i weight_i * (log Z(x_i, y_i) - log Z(x_i)) + log prior

  and the gradient is the difference between the feature counts on the label
  paths and their expectations under the model, plus the prior gradient.

  An instance whose log-likelihood is -inf the first time it is evaluated is
  skipped from then on. An instance that was finite and becomes -inf raises
  InvalidValueError, since the value would no longer be comparable across
  iterations.
  """

  def __init__(
      self,
      crf: crfs.CRF,
      instances: Sequence[Instance],
      *,
      gaussian_prior_variance: float = DEFAULT_GAUSSIAN_PRIOR_VARIANCE,
      use_hyperbolic_prior: bool = False,
      hyperbolic_prior_slope: float = DEFAULT_HYPERBOLIC_PRIOR_SLOPE,
      hyperbolic_prior_sharpness: float = DEFAULT_HYPERBOLIC_PRIOR_SHARPNESS,
      num_threads: int = 1):
    super().__init__(crf)
    for i, instance in enumerate(instances):
      if instance.output is None:
        raise ValueError(f'Instance {i} has no output labels')
    self.instances = list(instances)
    self.gaussian_prior_variance = gaussian_prior_variance
    self.use_hyperbolic_prior = use_hyperbolic_prior
    self.hyperbolic_prior_slope = hyperbolic_prior_slope
    self.hyperbolic_prior_sharpness = hyperbolic_prior_sharpness
    self.num_threads = num_threads
    # Whether each evaluated instance had an infinite value at first.
    self._infinite: dict[int, bool] = {}
    self._cached_version = -1
    self._cached_value = math.nan
    self._cached_gradient = None
    self._batch_cache = {}

  def _instance_result(self, ii: int) -> _InstanceResult:
    instance = self.instances[ii]
    labeled = lattices.SumLattice(
        self.crf, instance.inputs, instance.output, with_expectations=True)
    unlabeled = lattices.SumLattice(
        self.crf, instance.inputs, with_expectations=True)
    constraints = expectations = None
    if not (labeled.is_impossible or unlabeled.is_impossible):
      constraints = self.crf.flatten(labeled.expectations) * instance.weight
      expectations = self.crf.flatten(unlabeled.expectations) * instance.weight
    return _InstanceResult(ii, labeled.total_weight, unlabeled.total_weight,
                           constraints, expectations)

  def _batch_results(self, indices: Sequence[int]) -> list[_InstanceResult]:
    return [self._instance_result(ii) for ii in indices]

  def _expectation_value(
      self, indices: Sequence[int]) -> tuple[float, np.ndarray, np.ndarray]:
    """Log-likelihood of some instances and their feature counts.

    Args:
      indices: Instance indices.

    Returns:
      (value, constraints, expectations) tuple, where constraints are the
      feature counts on the label paths and expectations the feature counts
      under the model.
    """
    num_parameters = self.num_parameters()
    constraints = np.zeros([num_parameters])
    expectations = np.zeros([num_parameters])
    value = 0.0
    num_infinite_labeled = num_infinite_unlabeled = num_infinite = 0
    for batch in run_batches(self._batch_results, list(indices),
                             self.num_threads):
      for result in batch:
        instance = self.instances[result.index]
        name = instance.name or f'instance#{result.index}'
        if math.isinf(result.labeled_weight):
          num_infinite_labeled += 1
          logging.warning('%s has -infinite labeled weight.', name)
        if math.isinf(result.unlabeled_weight):
          num_infinite_unlabeled += 1
          logging.warning('%s has -infinite unlabeled weight.', name)
        weight = result.labeled_weight - result.unlabeled_weight
        is_infinite = not math.isfinite(weight)
        was_infinite = self._infinite.setdefault(result.index, is_infinite)
        if is_infinite:
          num_infinite += 1
          logging.warning('%s has -infinite weight; skipping.', name)
          if not was_infinite:
            raise InvalidValueError(
                f'{name} used to have a finite value, but now has value '
                f'{weight}')
          continue
        value += weight * instance.weight
        constraints += result.constraints
        expectations += result.expectations
    if num_infinite_labeled or num_infinite_unlabeled or num_infinite:
      logging.warning(
          'Number of instances with -infinite labeled weight: %d, -infinite '
          'unlabeled weight: %d, -infinite weight: %d', num_infinite_labeled,
          num_infinite_unlabeled, num_infinite)
    return value, constraints, expectations

  def prior(self) -> float:
    if self.use_hyperbolic_prior:
      return self.crf.hyperbolic_prior(self.hyperbolic_prior_slope,
                                       self.hyperbolic_prior_sharpness)
    return self.crf.gaussian_prior(self.gaussian_prior_variance)

  def prior_gradient(self) -> np.ndarray:
    if self.use_hyperbolic_prior:
      return self.crf.hyperbolic_prior_gradient(
          self.hyperbolic_prior_slope, self.hyperbolic_prior_sharpness)
    return self.crf.gaussian_prior_gradient(self.gaussian_prior_variance)

  def _compute(self, indices: Sequence[int],
               with_prior: bool) -> tuple[float, np.ndarray]:
    value, constraints, expectations = self._expectation_value(indices)
    gradient = constraints - expectations
    if with_prior:
      value += self.prior()
      gradient = gradient + self.prior_gradient()
    return value, gradient

  def value(self) -> float:
    if self.crf.version != self._cached_version:
      value, gradient = self._compute(range(len(self.instances)), True)
      self._cached_value = _check_finite('Label likelihood', value)
      self._cached_gradient = gradient
      self._cached_version = self.crf.version
      logging.info('Label likelihood value = %s', self._cached_value)
    return self._cached_value

  def value_gradient(self) -> np.ndarray:
    self.value()
    return _check_finite_gradient('Label likelihood',
                                  self._cached_gradient).copy()

  def _batch(
      self, batch: int, assignments: Sequence[tuple[int, int]]
  ) -> tuple[float, np.ndarray]:
    if not 0 <= batch < len(assignments):
      raise ValueError(
          f'Batch index {batch} is out of range [0, {len(assignments)})')
    start, end = assignments[batch]
    if not 0 <= start <= end <= len(self.instances):
      raise ValueError(
          f'Invalid batch range [{start}, {end}) over {len(self.instances)} '
          'instances')
    key = (batch, start, end, len(assignments))
    cached = self._batch_cache.get(key)
    if cached is None or cached[0] != self.crf.version:
      # The prior is counted once, in the last batch.
      value, gradient = self._compute(
          range(start, end), batch == len(assignments) - 1)
      _check_finite(f'Label likelihood of batch {batch}', value)
      cached = (self.crf.version, value, gradient)
      self._batch_cache[key] = cached
    return cached[1], cached[2]

  def batch_value(self, batch: int,
                  assignments: Sequence[tuple[int, int]]) -> float:
    return self._batch(batch, assignments)[0]

  def batch_value_gradient(
      self, batch: int, assignments: Sequence[tuple[int, int]]) -> np.ndarray:
    return _check_finite_gradient(f'Label likelihood of batch {batch}',
                                  self._batch(batch, assignments)[1]).copy()


def _composite_gradient(crf: crfs.CRF, inputs: np.ndarray,
                        composite: np.ndarray) -> np.ndarray:
  """Gradient of sum(composite * transition marginals) wrt the parameters."""
  weights_fn = crf.weights_fn(inputs)
  composite = jax.lax.stop_gradient(jnp.asarray(composite))

  def objective(params):
    return jnp.sum(composite *
                   lattices.transition_marginals(weights_fn(params)))

  return crf.flatten(jax.grad(objective)(crf.params))


class CRFOptimizableByGE(_CRFOptimizable):
  """Generalized expectation criteria on unlabeled data, plus a prior.

  The value is the sum of the constraint values. Its gradient goes through the
  model marginals: each constraint reports the derivative of its value with
  respect to every transition marginal, and that table is pulled back to the
  parameters by differentiating the forward-backward computation.
  """

  def __init__(self,
               crf: crfs.CRF,
               constraints: Sequence[ge_constraints.GEConstraints],
               data: Sequence[np.ndarray],
               state_label_map: Optional[transducers.StateLabelMap] = None,
               *,
               num_threads: int = 1,
               weight: float = 1.0,
               gaussian_prior_variance: float = (
                   DEFAULT_GAUSSIAN_PRIOR_VARIANCE)):
    super().__init__(crf)
    if state_label_map is None:
      state_label_map = crf.state_label_map()
    self.constraints = list(constraints)
    self.data = [np.asarray(x) for x in data]
    self.num_threads = num_threads
    self.weight = weight
    self.gaussian_prior_variance = gaussian_prior_variance
    self.instances_with_constraints = np.zeros([len(self.data)], dtype=bool)
    for constraint in self.constraints:
      constraint.set_state_label_map(state_label_map)
      self.instances_with_constraints |= constraint.pre_process(self.data)
    self._save_xis = any(c.needs_xis for c in self.constraints)
    self._cached_version = -1
    self._cached_value = math.nan
    self._cached_gradient = None

  def _lattice_batch(self, indices: Sequence[int]):
    lattice_list = [
        lattices.SumLattice(self.crf, self.data[ii], save_xis=self._save_xis)
        if self.instances_with_constraints[ii] else None for ii in indices
    ]
    copies = [c.copy() for c in self.constraints]
    for constraint in copies:
      constraint.compute_expectations(lattice_list)
    return lattice_list, copies

  def _gradient_batch(self, items) -> np.ndarray:
    gradient = np.zeros([self.num_parameters()])
    for ii, lattice in items:
      if lattice is None or lattice.is_impossible:
        continue
      composite = sum(c.composite_values(self.data[ii])
                      for c in self.constraints)
      gradient += _composite_gradient(self.crf, self.data[ii], composite)
    return gradient

  def _cache_value_and_gradient(self) -> None:
    lattice_list = []
    for constraint in self.constraints:
      constraint.zero_expectations()
    for batch_lattices, copies in run_batches(
        self._lattice_batch, list(range(len(self.data))), self.num_threads):
      lattice_list.extend(batch_lattices)
      for constraint, partial in zip(self.constraints, copies):
        constraint.merge(partial)
    logging.debug('Done computing GE expectations.')

    value = sum(c.value() for c in self.constraints)
    gradient = sum(
        run_batches(self._gradient_batch, list(enumerate(lattice_list)),
                    self.num_threads), np.zeros([self.num_parameters()]))
    value += self.crf.gaussian_prior(self.gaussian_prior_variance)
    gradient = gradient + self.crf.gaussian_prior_gradient(
        self.gaussian_prior_variance)
    self._cached_value = self.weight * value
    self._cached_gradient = self.weight * gradient
    logging.info('GE value = %s', self._cached_value)

  def value(self) -> float:
    if self.crf.version != self._cached_version:
      self._cache_value_and_gradient()
      self._cached_version = self.crf.version
    return self._cached_value

  def value_gradient(self) -> np.ndarray:
    self.value()
    return self._cached_gradient.copy()


# Gradient with respect to the lattice weights.
_negative_entropy_and_gradient = jax.jit(
    jax.value_and_grad(lattices.negative_entropy))


class CRFOptimizableByEntropyRegularization(_CRFOptimizable):
  """Entropy regularization on unlabeled data.

  The value is `weight * sum_i sum_y p(y|x_i) log p(y|x_i)`, the negated
  conditional entropy of the model on the unlabeled sequences. Maximizing it
  makes the model confident on them. There is no prior; combine it with a
  label likelihood objective, which has one.

  Sequences without any complete path are logged and skipped.
  """

  def __init__(self,
               crf: crfs.CRF,
               data: Sequence[np.ndarray],
               *,
               weight: float = 1.0,
               num_threads: int = 1):
    super().__init__(crf)
    self.data = [np.asarray(x) for x in data]
    self.weight = weight
    self.num_threads = num_threads
    self._cached_version = -1
    self._cached_value = math.nan
    self._cached_gradient = None

  def _entropy_batch(self,
                     indices: Sequence[int]) -> tuple[float, np.ndarray]:
    value = 0.0
    gradient = np.zeros([self.num_parameters()])
    for ii in indices:
      inputs = self.data[ii]
      instance_value, weight_gradient = _negative_entropy_and_gradient(
          self.crf.weights(inputs))
      instance_value = float(instance_value)
      if not math.isfinite(instance_value):
        logging.warning('Instance %d has no complete path; skipping.', ii)
        continue
      value += instance_value
      gradient += self.crf.flatten(
          self.crf.expectations(inputs, weight_gradient))
    return value, gradient

  def value(self) -> float:
    if self.crf.version != self._cached_version:
      value = 0.0
      gradient = np.zeros([self.num_parameters()])
      for partial_value, partial in run_batches(
          self._entropy_batch, list(range(len(self.data))), self.num_threads):
        value += partial_value
        gradient += partial
      self._cached_value = _check_finite('Entropy regularization',
                                         self.weight * value)
      self._cached_gradient = self.weight * gradient
      self._cached_version = self.crf.version
      logging.info('Entropy regularization value = %s', self._cached_value)
    return self._cached_value

  def value_gradient(self) -> np.ndarray:
    self.value()
    return _check_finite_gradient('Entropy regularization',
                                  self._cached_gradient).copy()


class CRFOptimizableByGradientValues(_CRFOptimizable):
  """Sum of several objectives over the parameters of the same CRF."""

  def __init__(self, crf: crfs.CRF,
               objectives: Sequence[GradientValueOptimizable]):
    super().__init__(crf)
    if not objectives:
      raise ValueError('No objectives to sum')
    for i, objective in enumerate(objectives):
      if objective.num_parameters() != crf.num_parameters():
        raise ValueError(
            f'Objective {i} has {objective.num_parameters()} parameters, '
            f'expected {crf.num_parameters()}')
    self.objectives = list(objectives)

  def value(self) -> float:
    return sum(objective.value() for objective in self.objectives)

  def value_gradient(self) -> np.ndarray:
    return sum(
        (objective.value_gradient() for objective in self.objectives),
        np.zeros([self.num_parameters()]))


def _normalize(probs: np.ndarray) -> np.ndarray:
  return probs / np.sum(probs)


class CRFOptimizableByKL(_CRFOptimizable):
  """M-step of posterior regularization.

  Fits the model p to the auxiliary distribution q by maximizing

    sum_i (E_q[log weight of the path] - log Z_p(x_i)) + log prior,

  which is -KL(q || p) up to the entropy of q. The q marginals are computed
  once, at construction.
  """

  def __init__(self,
               crf: crfs.CRF,
               data: Sequence[np.ndarray],
               aux_model: pr_constraints.PRAuxiliaryModel,
               cached_dots: Optional[Sequence[np.ndarray]] = None,
               *,
               num_threads: int = 1,
               weight: float = 1.0,
               gaussian_prior_variance: float = (
                   DEFAULT_GAUSSIAN_PRIOR_VARIANCE)):
    super().__init__(crf)
    if weight <= 0:
      raise ValueError(f'weight should be positive, got {weight}')
    self.data = [np.asarray(x) for x in data]
    self.num_threads = num_threads
    self.weight = weight
    self.gaussian_prior_variance = gaussian_prior_variance
    self._cached_version = -1
    self._cached_value = math.nan
    self._cached_gradient = None
    self._gather_constraints(aux_model, cached_dots)

  def _gather_constraints(self, aux_model, cached_dots) -> None:
    self._marginals = []
    self.constraints = np.zeros([self.num_parameters()])
    for ii, inputs in enumerate(self.data):
      q = lattices.PRSumLattice(
          self.crf, aux_model, inputs,
          None if cached_dots is None else cached_dots[ii], save_xis=True)
      if q.is_impossible:
        logging.warning('Instance %d has no path under the auxiliary model; '
                        'skipping.', ii)
        self._marginals.append(None)
        continue
      gamma_probs = np.exp(q.gammas)
      gamma_probs[0] = _normalize(gamma_probs[0])
      gamma_probs[-1] = _normalize(gamma_probs[-1])
      xi_probs = np.exp(q.xis)
      self._marginals.append((gamma_probs, xi_probs))
      kl = lattices.KLSumLattice(
          self.crf, inputs, gamma_probs, xi_probs, with_expectations=True)
      self.constraints += self.crf.flatten(kl.expectations)

  def _expectation_batch(self,
                         indices: Sequence[int]) -> tuple[float, np.ndarray]:
    value = 0.0
    expectations = np.zeros([self.num_parameters()])
    for ii in indices:
      if self._marginals[ii] is None:
        continue
      gamma_probs, xi_probs = self._marginals[ii]
      kl = lattices.KLSumLattice(self.crf, self.data[ii], gamma_probs,
                                 xi_probs)
      unlabeled = lattices.SumLattice(
          self.crf, self.data[ii], with_expectations=True, weights=kl.weights)
      value += kl.total_weight - unlabeled.total_weight
      expectations += self.crf.flatten(unlabeled.expectations)
    return value, expectations

  def value(self) -> float:
    if self.crf.version != self._cached_version:
      value = 0.0
      expectations = np.zeros([self.num_parameters()])
      for partial_value, partial in run_batches(
          self._expectation_batch, list(range(len(self.data))),
          self.num_threads):
        value += partial_value
        expectations += partial
      prior = self.crf.gaussian_prior(self.gaussian_prior_variance)
      logging.info('Gaussian prior = %s', prior)
      self._cached_value = _check_finite('KL value',
                                         self.weight * (value + prior))
      self._cached_gradient = self.weight * (
          self.constraints - expectations +
          self.crf.gaussian_prior_gradient(self.gaussian_prior_variance))
      self._cached_version = self.crf.version
      logging.info('KL value = %s', self._cached_value)
    return self._cached_value

  def value_gradient(self) -> np.ndarray:
    self.value()
    return _check_finite_gradient('KL', self._cached_gradient).copy()


class ConstraintsOptimizableByPR(GradientValueOptimizable):
  """E-step of posterior regularization, over the auxiliary parameters.

  Maximizes the dual objective

    -sum_i log Z_q(x_i) + aux_model.value()

  with the model p held fixed. The model transition weights are computed once,
  at construction.
  """

  def __init__(self,
               crf: crfs.CRF,
               data: Sequence[np.ndarray],
               aux_model: pr_constraints.PRAuxiliaryModel,
               *,
               num_threads: int = 1):
    self.crf = crf
    self.data = [np.asarray(x) for x in data]
    self.aux_model = aux_model
    self.num_threads = num_threads
    self.cached_dots = [
        np.asarray(crf.weights(x).transitions) for x in self.data
    ]
    self._stale = True
    self._cached_value = math.nan
    self._cached_gradient = None

  def num_parameters(self) -> int:
    return self.aux_model.num_parameters()

  def parameters(self) -> np.ndarray:
    return self.aux_model.parameters()

  def set_parameters(self, parameters: np.ndarray) -> None:
    self._stale = True
    self.aux_model.set_parameters(parameters)

  def _expectation_batch(self, indices: Sequence[int]):
    partial = self.aux_model.copy()
    value = 0.0
    for ii in indices:
      lattice = lattices.PRSumLattice(
          self.crf, partial, self.data[ii], self.cached_dots[ii],
          with_constraint_expectations=True)
      partial.add_expectations(lattice.constraint_expectations)
      value -= lattice.total_weight
    return value, partial

  def value(self) -> float:
    if self._stale:
      self.aux_model.zero_expectations()
      value = 0.0
      for partial_value, partial in run_batches(
          self._expectation_batch, list(range(len(self.data))),
          self.num_threads):
        value += partial_value
        self.aux_model.merge(partial)
      self._cached_value = value + self.aux_model.value()
      self._cached_gradient = self.aux_model.gradient()
      self._stale = False
      logging.info('Auxiliary distribution value = %s', self._cached_value)
    return self._cached_value

  def value_gradient(self) -> np.ndarray:
    self.value()
    return self._cached_gradient.copy()

  def complete_value(self) -> float:
    """Penalty of the constraints under the current auxiliary distribution."""
    self.value()
    return self.aux_model.complete_value()
