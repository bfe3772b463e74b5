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

"""Posterior regularization (PR) constraints and the auxiliary model.

PR trains the model p together with an auxiliary distribution q that is close
to p while meeting expectation constraints. q adds a weight to every model
transition, computed from the constraint parameters, which are the dual
variables of the constraints.
"""

import abc
from collections.abc import Sequence
import copy

from absl import logging
import einops
import jax.numpy as jnp
import numpy as np

from lincrf import ge_constraints
from lincrf import lattices
from lincrf import transducers


class PRConstraint(abc.ABC):
  """Interface of PR constraints.

  Constraints don't own their parameters: PRAuxiliaryModel holds one flat
  vector and passes each constraint its slice.
  """

  @abc.abstractmethod
  def num_dimensions(self) -> int:
    """Number of parameters."""

  @abc.abstractmethod
  def set_state_label_map(self, state_label_map: transducers.StateLabelMap):
    pass

  @abc.abstractmethod
  def pre_process(self, data: Sequence[np.ndarray]) -> np.ndarray:
    """Recounts constraint firings, returns the mask of constrained inputs."""

  @abc.abstractmethod
  def scores(self, inputs: np.ndarray, parameters: np.ndarray) -> np.ndarray:
    """[num_positions, num_labels] weights added to transitions into each
    label at each position."""

  @abc.abstractmethod
  def lattice_expectations(self, lattice: lattices.SumLattice) -> np.ndarray:
    """Expectations contributed by one lattice."""

  @abc.abstractmethod
  def add_expectations(self, expectations: np.ndarray) -> None:
    pass

  @abc.abstractmethod
  def zero_expectations(self) -> None:
    pass

  @abc.abstractmethod
  def auxiliary_value(self, parameters: np.ndarray) -> float:
    """Contribution of the constraints to the dual objective."""

  @abc.abstractmethod
  def complete_value(self, parameters: np.ndarray) -> float:
    """Penalty of the current expectations, used in the outer objective."""

  @abc.abstractmethod
  def gradient(self, parameters: np.ndarray) -> np.ndarray:
    """Gradient of the dual objective contributions."""

  @abc.abstractmethod
  def copy(self) -> 'PRConstraint':
    """Copy with fresh expectations, sharing targets and weights."""


class _PairL2PRConstraints(PRConstraint):
  """L2 penalized constraints on (feature, label) expectations.

  Each constrained (feature, label) pair has one parameter lam, a target t and
  a weight w. With e the expectation, normalized by the number of firings
  when `normalized`:
  -   score of a transition into the label where the feature fires:
      lam / count if normalized, lam otherwise.
  -   auxiliary value: t * lam - lam^2 / (2 w).
  -   complete value: w * (t - e)^2 / 2.
  -   gradient: t - e - lam / w.
  """

  def __init__(self, num_features: int, normalized: bool = True):
    self._num_features = num_features
    self.normalized = normalized
    self._features: list[int] = []
    self._feature_index: dict[int, int] = {}
    self.counts = np.zeros([0])
    self.expectations = None
    self._map = None
    self._cache: list[int] = []

  @abc.abstractmethod
  def _pairs(self) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    """(feature slot, label, target, weight) arrays in parameter order."""

  def _add_feature(self, feature: int) -> int:
    if not 0 <= feature <= self._num_features:
      raise ValueError(
          f'Feature index {feature} is out of range [0, {self._num_features}]')
    if feature not in self._feature_index:
      self._feature_index[feature] = len(self._features)
      self._features.append(feature)
      self.counts = np.append(self.counts, 0.0)
      self.zero_expectations()
    return self._feature_index[feature]

  def num_dimensions(self) -> int:
    return self._pairs()[0].shape[0]

  def set_state_label_map(self, state_label_map: transducers.StateLabelMap):
    self._map = state_label_map
    self.zero_expectations()

  def _firing(self, inputs: np.ndarray) -> np.ndarray:
    return ge_constraints.firing_mask(inputs, self._features,
                                      self._num_features)

  def pre_process(self, data: Sequence[np.ndarray]) -> np.ndarray:
    constrained = np.zeros([len(data)], dtype=bool)
    counts = np.zeros_like(self.counts)
    for ii, inputs in enumerate(data):
      fires = self._firing(inputs)
      counts += fires.sum(axis=0)
      constrained[ii] = fires.any()
    self.counts = counts
    return constrained

  def pre_process_vector(self, features: np.ndarray) -> list[int]:
    """Caches the constrained features firing in a single feature vector."""
    fires = self._firing(np.asarray(features)[np.newaxis])[0]
    self._cache = [self._features[k] for k in np.flatnonzero(fires)]
    return list(self._cache)

  def _parameter_table(self, parameters: np.ndarray) -> np.ndarray:
    slots, labels, _, _ = self._pairs()
    table = np.zeros([len(self._features), self._map.num_labels])
    values = np.asarray(parameters, dtype=np.float64)
    if self.normalized:
      counts = self.counts[slots]
      values = np.divide(
          values, counts, out=np.zeros_like(values), where=counts > 0)
    table[slots, labels] = values
    return table

  def scores(self, inputs: np.ndarray, parameters: np.ndarray) -> np.ndarray:
    fires = self._firing(inputs).astype(np.float64)
    return fires @ self._parameter_table(parameters)

  def score(self, destination: int, parameters: np.ndarray) -> float:
    """Score of a transition into `destination`, for the features cached by
    pre_process_vector()."""
    label = self._map.label_index(destination)
    if label == transducers.START_LABEL:
      return 0.0
    table = self._parameter_table(parameters)
    return float(sum(table[self._feature_index[f], label]
                     for f in self._cache))

  def lattice_expectations(self, lattice: lattices.SumLattice) -> np.ndarray:
    result = np.zeros([len(self._features), self._map.num_labels])
    if lattice.is_impossible:
      return result
    label_probs = np.exp(lattice.gammas[1:]) @ self._map.indicator()
    fires = self._firing(np.asarray(lattice.inputs)).astype(np.float64)
    return result + fires.T @ label_probs

  def add_expectations(self, expectations: np.ndarray) -> None:
    self.expectations = self.expectations + expectations

  def zero_expectations(self) -> None:
    if self._map is not None:
      self.expectations = np.zeros(
          [len(self._features), self._map.num_labels])

  def _pair_expectations(self) -> np.ndarray:
    slots, labels, _, _ = self._pairs()
    expectations = self.expectations[slots, labels]
    if self.normalized:
      counts = self.counts[slots]
      expectations = np.divide(
          expectations, counts, out=np.zeros_like(expectations),
          where=counts > 0)
    return expectations

  def auxiliary_value(self, parameters: np.ndarray) -> float:
    _, _, targets, weights = self._pairs()
    return float(np.sum(targets * parameters - parameters**2 / (2 * weights)))

  def complete_value(self, parameters: np.ndarray) -> float:
    del parameters
    _, _, targets, weights = self._pairs()
    return float(
        np.sum(weights * (targets - self._pair_expectations())**2 / 2))

  def gradient(self, parameters: np.ndarray) -> np.ndarray:
    _, _, targets, weights = self._pairs()
    return targets - self._pair_expectations() - parameters / weights

  def copy(self) -> '_PairL2PRConstraints':
    result = copy.copy(self)
    result.zero_expectations()
    result._cache = []  # pylint: disable=protected-access
    return result


class OneLabelL2PRConstraints(_PairL2PRConstraints):
  """Constraints on the whole label distribution where a feature fires.

  The parameter of constraint ci and label li is at index ci + li * K, K being
  the number of constrained features.
  """

  def __init__(self, num_features: int, normalized: bool = True):
    super().__init__(num_features, normalized)
    self._targets: list[np.ndarray] = []
    self._weights: list[float] = []

  def add_constraint(self, feature: int, target: Sequence[float],
                     weight: float) -> None:
    """Constrains the label distribution where `feature` fires.

    Args:
      feature: Feature index, or num_features for every position.
      target: [num_labels] target label distribution.
      weight: Strength of the L2 penalty.
    """
    if feature in self._feature_index:
      raise ValueError(f'Feature {feature} is already constrained')
    target = np.asarray(target, dtype=np.float64)
    if self._targets and target.shape != self._targets[0].shape:
      raise ValueError(
          f'Expected a target of shape {self._targets[0].shape}, got '
          f'{target.shape}')
    self._add_feature(feature)
    self._targets.append(target)
    self._weights.append(float(weight))

  def _pairs(self):
    if not self._targets:
      empty = np.zeros([0])
      return empty.astype(np.int64), empty.astype(np.int64), empty, empty
    num_constraints = len(self._targets)
    num_labels = self._targets[0].shape[0]
    slots = einops.repeat(
        np.arange(num_constraints), 'k -> (l k)', l=num_labels)
    labels = einops.repeat(np.arange(num_labels), 'l -> (l k)',
                           k=num_constraints)
    targets = einops.rearrange(np.stack(self._targets), 'k l -> (l k)')
    weights = einops.repeat(
        np.asarray(self._weights), 'k -> (l k)', l=num_labels)
    return slots, labels, targets, weights


class OneLabelL2IndPRConstraints(_PairL2PRConstraints):
  """Constraints on individual label probabilities where a feature fires.

  Each (feature, label) pair has its own target and weight, and parameters
  are ordered as the pairs were added.
  """

  def __init__(self, num_features: int, normalized: bool = True):
    super().__init__(num_features, normalized)
    self._pair_list: list[tuple[int, int, float, float]] = []

  def add_constraint(self, feature: int, label: int, target: float,
                     weight: float) -> None:
    if any(f == feature and l == label for f, l, _, _ in self._pair_list):
      raise ValueError(
          f'Label {label} of feature {feature} is already constrained')
    self._add_feature(feature)
    self._pair_list.append((feature, label, float(target), float(weight)))

  def _pairs(self):
    slots = np.array(
        [self._feature_index[f] for f, _, _, _ in self._pair_list],
        dtype=np.int64)
    labels = np.array([l for _, l, _, _ in self._pair_list], dtype=np.int64)
    targets = np.array([t for _, _, t, _ in self._pair_list])
    weights = np.array([w for _, _, _, w in self._pair_list])
    return slots, labels, targets, weights


class PRAuxiliaryModel:
  """The auxiliary distribution q of posterior regularization.

  Holds the parameters of all constraints in one flat vector, in constraint
  order.
  """

  def __init__(self, state_label_map: transducers.StateLabelMap,
               constraints: Sequence[PRConstraint]):
    self._map = state_label_map
    self.constraints = list(constraints)
    for constraint in self.constraints:
      constraint.set_state_label_map(state_label_map)
    sizes = [c.num_dimensions() for c in self.constraints]
    self._offsets = np.cumsum([0] + sizes)
    self._parameters = np.zeros([self._offsets[-1]])
    logging.info('PR auxiliary model with %d parameters.',
                 self._parameters.shape[0])

  def num_parameters(self) -> int:
    return self._parameters.shape[0]

  def parameters(self) -> np.ndarray:
    return self._parameters.copy()

  def set_parameters(self, parameters: np.ndarray) -> None:
    parameters = np.asarray(parameters, dtype=np.float64)
    if parameters.shape != self._parameters.shape:
      raise ValueError(
          f'Expected {self._parameters.shape[0]} parameters, got shape '
          f'{parameters.shape}')
    self._parameters = parameters.copy()

  def _slices(self):
    for i, constraint in enumerate(self.constraints):
      yield constraint, self._parameters[self._offsets[i]:self._offsets[i + 1]]

  def transition_weights(self, inputs: np.ndarray) -> jnp.ndarray:
    """[num_positions, num_states, num_states] auxiliary transition weights."""
    inputs = np.asarray(inputs)
    per_label = np.zeros([inputs.shape[0], self._map.num_labels])
    for constraint, parameters in self._slices():
      per_label += constraint.scores(inputs, parameters)
    per_state = per_label @ self._map.indicator().T
    return jnp.asarray(
        einops.repeat(per_state, 'n s -> n r s', r=self._map.num_states))

  def lattice_expectations(
      self, lattice: lattices.SumLattice) -> tuple[np.ndarray, ...]:
    return tuple(c.lattice_expectations(lattice) for c in self.constraints)

  def add_expectations(self, expectations: Sequence[np.ndarray]) -> None:
    for constraint, e in zip(self.constraints, expectations):
      constraint.add_expectations(e)

  def zero_expectations(self) -> None:
    for constraint in self.constraints:
      constraint.zero_expectations()

  def value(self) -> float:
    return sum(c.auxiliary_value(p) for c, p in self._slices())

  def complete_value(self) -> float:
    return sum(c.complete_value(p) for c, p in self._slices())

  def gradient(self) -> np.ndarray:
    if not self.constraints:
      return np.zeros([0])
    return np.concatenate([c.gradient(p) for c, p in self._slices()])

  def copy(self) -> 'PRAuxiliaryModel':
    result = copy.copy(self)
    result.constraints = [c.copy() for c in self.constraints]
    result._parameters = self._parameters.copy()  # pylint: disable=protected-access
    return result

  def merge(self, other: 'PRAuxiliaryModel') -> None:
    for constraint, other_constraint in zip(self.constraints,
                                            other.constraints):
      constraint.add_expectations(other_constraint.expectations)


def constrained_instances(constraints: Sequence[PRConstraint],
                          data: Sequence[np.ndarray]) -> np.ndarray:
  """Pre-processes constraints, returns the mask of constrained inputs."""
  mask = np.zeros([len(data)], dtype=bool)
  for constraint in constraints:
    mask |= constraint.pre_process(data)
  return mask
