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

"""Generalized expectation (GE) criteria.

A GE criterion compares the label marginals the model predicts at the
positions where an input feature fires against a target distribution supplied
by the user. Criteria accumulate expectations from SumLattice marginals and
expose their value and its derivative with respect to those marginals.

Workers of a multi-threaded computation each accumulate into their own
`copy()`, and the driver `merge()`s the copies afterwards.
"""

import abc
from collections.abc import Sequence
import copy
from typing import Optional

from absl import logging
import einops
import numpy as np

from lincrf import lattices
from lincrf import transducers


def firing_mask(inputs: np.ndarray, features: Sequence[int],
                num_features: int) -> np.ndarray:
  """[num_positions, len(features)] bool mask of where features fire.

  A feature fires at a position when its value is nonzero. The feature index
  `num_features` denotes a global feature firing at every position.

  Args:
    inputs: [num_positions, num_features] feature vectors.
    features: Feature indices.
    num_features: Size of the feature vectors.

  Returns:
    Firing mask.
  """
  inputs = np.asarray(inputs)
  if inputs.ndim != 2 or inputs.shape[1] != num_features:
    raise ValueError(
        f'inputs should have shape [num_positions, {num_features}] but got '
        f'{inputs.shape}')
  padded = np.concatenate(
      [inputs != 0, np.ones([inputs.shape[0], 1], dtype=bool)], axis=1)
  return padded[:, np.asarray(features, dtype=np.int64)]


class GEConstraints(abc.ABC):
  """Interface of GE criteria."""

  # Whether compute_expectations() needs lattices with transition marginals.
  needs_xis = False

  @abc.abstractmethod
  def set_state_label_map(self, state_label_map: transducers.StateLabelMap):
    """Sets the mapping from model states to constrained labels."""

  @abc.abstractmethod
  def pre_process(self, data: Sequence[np.ndarray]) -> np.ndarray:
    """Counts constraint firings over a training set.

    Args:
      data: Input sequences. Counts from earlier calls are discarded.

    Returns:
      [len(data)] bool mask of the sequences where some constraint fires.
    """

  @abc.abstractmethod
  def zero_expectations(self) -> None:
    pass

  @abc.abstractmethod
  def compute_expectations(
      self, lattice_list: Sequence[Optional[lattices.SumLattice]]) -> None:
    """Accumulates expectations. None and impossible lattices are skipped."""

  @abc.abstractmethod
  def value(self) -> float:
    pass

  @abc.abstractmethod
  def composite_values(self, inputs: np.ndarray) -> np.ndarray:
    """Derivative of value() with respect to transition marginals.

    Args:
      inputs: [num_positions, num_features] feature vectors.

    Returns:
      [num_positions, num_states, num_states] table whose (ip, i, j) entry is
      the derivative of value() with respect to the marginal probability of
      the transition i -> j at position ip.
    """

  @abc.abstractmethod
  def copy(self) -> 'GEConstraints':
    """Copy with fresh expectations, sharing targets and weights."""

  @abc.abstractmethod
  def merge(self, other: 'GEConstraints') -> None:
    """Adds the expectations accumulated by a copy."""


def _kl_value(targets: np.ndarray, expectations: np.ndarray,
              counts: np.ndarray, weights: np.ndarray) -> float:
  """sum w * t * (log(E / count) - log t) over constraints that fired."""
  value = 0.0
  for target, expectation, count, weight in zip(targets, expectations, counts,
                                                weights):
    if count == 0:
      continue
    positive = target > 0
    if np.any(expectation[positive] == 0):
      return -np.inf
    value += weight * np.sum(target[positive] * (
        np.log(expectation[positive] / count) - np.log(target[positive])))
  return float(value)


def _kl_gradient(targets: np.ndarray, expectations: np.ndarray,
                 weights: np.ndarray) -> np.ndarray:
  usable = (targets > 0) & (expectations > 0)
  ratio = np.divide(
      targets, expectations, out=np.zeros_like(targets), where=usable)
  return _expand(weights, ratio) * ratio


def _l2_value(targets: np.ndarray, expectations: np.ndarray,
              counts: np.ndarray, weights: np.ndarray) -> float:
  """-sum w * (t - E / count)^2 over constraints that fired."""
  fired = counts > 0
  normalized = expectations[fired] / _expand(counts[fired], targets[fired])
  penalty = np.square(targets[fired] - normalized)
  return float(-np.sum(_expand(weights[fired], penalty) * penalty))


def _l2_gradient(targets: np.ndarray, expectations: np.ndarray,
                 counts: np.ndarray, weights: np.ndarray) -> np.ndarray:
  safe_counts = np.where(counts > 0, counts, 1)
  counts_ = _expand(safe_counts, targets)
  gradient = 2 * _expand(weights, targets) * (
      targets - expectations / counts_) / counts_
  return np.where(_expand(counts, targets) > 0, gradient, 0)


def _expand(x: np.ndarray, like: np.ndarray) -> np.ndarray:
  return np.reshape(x, x.shape + (1,) * (like.ndim - x.ndim))


class _FeatureGEConstraints(GEConstraints):
  """GE criteria keyed by input feature."""

  def __init__(self, num_features: int,
               state_label_map: Optional[transducers.StateLabelMap] = None):
    self._num_features = num_features
    self._map = None
    self._features: list[int] = []
    self._feature_index: dict[int, int] = {}
    self._weights = np.zeros([0])
    self._targets = np.zeros([0])
    self.counts = np.zeros([0])
    self.expectations = None
    self._cache: list[int] = []
    if state_label_map is not None:
      self.set_state_label_map(state_label_map)

  @property
  def features(self) -> list[int]:
    return list(self._features)

  @property
  def num_labels(self) -> int:
    if self._map is None:
      raise ValueError('The state label map has not been set')
    return self._map.num_labels

  def _label_shape(self) -> tuple[int, ...]:
    raise NotImplementedError

  def set_state_label_map(self, state_label_map: transducers.StateLabelMap):
    self._map = state_label_map
    self.zero_expectations()

  def _add_feature(self, feature: int, weight: float) -> int:
    if not 0 <= feature <= self._num_features:
      raise ValueError(
          f'Feature index {feature} is out of range [0, {self._num_features}]')
    if feature in self._feature_index:
      raise ValueError(f'Feature {feature} is already constrained')
    self._feature_index[feature] = len(self._features)
    self._features.append(feature)
    self._weights = np.append(self._weights, weight)
    self.counts = np.append(self.counts, 0.0)
    if self._map is not None:
      self.zero_expectations()
    return self._feature_index[feature]

  def _firing(self, inputs: np.ndarray) -> np.ndarray:
    return firing_mask(inputs, self._features, self._num_features)

  def pre_process(self, data: Sequence[np.ndarray]) -> np.ndarray:
    constrained = np.zeros([len(data)], dtype=bool)
    counts = np.zeros_like(self.counts)
    for ii, inputs in enumerate(data):
      fires = self._counted_positions(self._firing(inputs))
      counts += fires.sum(axis=0)
      constrained[ii] = fires.any()
    self.counts = counts
    logging.info('%s: %d of %d instances contain constraints.',
                 type(self).__name__, constrained.sum(), len(data))
    return constrained

  def _counted_positions(self, fires: np.ndarray) -> np.ndarray:
    return fires

  def pre_process_vector(self, features: np.ndarray) -> list[int]:
    """Caches the constrained features firing in a single feature vector."""
    fires = self._firing(np.asarray(features)[np.newaxis])[0]
    self._cache = [self._features[k] for k in np.flatnonzero(fires)]
    return list(self._cache)

  def zero_expectations(self) -> None:
    if self._map is None:
      self.expectations = None
      return
    self.expectations = np.zeros((len(self._features),) + self._label_shape())

  def copy(self) -> '_FeatureGEConstraints':
    result = copy.copy(self)
    result.zero_expectations()
    result._cache = []  # pylint: disable=protected-access
    return result

  def merge(self, other: GEConstraints) -> None:
    self.expectations = self.expectations + other.expectations

  def gradient_contribution(self) -> np.ndarray:
    """Derivative of value() with respect to each expectation entry."""
    raise NotImplementedError


class OneLabelGEConstraints(_FeatureGEConstraints):
  """Criteria on the label distribution at positions where a feature fires."""

  def _label_shape(self) -> tuple[int, ...]:
    return (self.num_labels,)

  def add_constraint(self, feature: int, target: Sequence[float],
                     weight: float = 1.0) -> None:
    """Constrains the label distribution where `feature` fires.

    Args:
      feature: Feature index, or num_features for every position.
      target: [num_labels] target label distribution.
      weight: Strength of the criterion.
    """
    target = np.asarray(target, dtype=np.float64)
    if target.ndim != 1:
      raise ValueError(f'Expected a target vector, got shape {target.shape}')
    if self._features and target.shape != self._targets.shape[1:]:
      raise ValueError(
          f'Expected a target of shape {self._targets.shape[1:]}, got '
          f'{target.shape}')
    self._add_feature(feature, weight)
    if len(self._features) == 1:
      self._targets = target[np.newaxis]
    else:
      self._targets = np.concatenate([self._targets, target[np.newaxis]])

  def compute_expectations(
      self, lattice_list: Sequence[Optional[lattices.SumLattice]]) -> None:
    indicator = self._map.indicator()
    for lattice in lattice_list:
      if lattice is None or lattice.is_impossible:
        continue
      # Label distribution after reading each input position.
      label_probs = np.exp(lattice.gammas[1:]) @ indicator
      fires = self._firing(np.asarray(lattice.inputs)).astype(np.float64)
      self.expectations += fires.T @ label_probs

  def composite_values(self, inputs: np.ndarray) -> np.ndarray:
    fires = self._firing(inputs).astype(np.float64)
    per_label = fires @ self.gradient_contribution()
    per_state = per_label @ self._map.indicator().T
    return einops.repeat(per_state, 'n s -> n r s', r=self._map.num_states)

  def composite_value(self, ip: int, source: int, destination: int) -> float:
    """Composite value of one transition, for the features cached by
    pre_process_vector()."""
    del ip, source
    label = self._map.label_index(destination)
    if label == transducers.START_LABEL:
      return 0.0
    contribution = self.gradient_contribution()
    return float(
        sum(contribution[self._feature_index[f], label] for f in self._cache))


class OneLabelKLGEConstraints(OneLabelGEConstraints):
  """KL divergence criterion.

  value = sum_f w * sum_l t_l * (log(E_l / count) - log t_l)

  This is -inf when some target label has zero expectation.
  """

  def value(self) -> float:
    return _kl_value(self._targets, self.expectations, self.counts,
                     self._weights)

  def gradient_contribution(self) -> np.ndarray:
    return _kl_gradient(self._targets, self.expectations, self._weights)


class OneLabelL2GEConstraints(OneLabelGEConstraints):
  """Squared error criterion: -sum_f w * sum_l (t_l - E_l / count)^2."""

  def value(self) -> float:
    return _l2_value(self._targets, self.expectations, self.counts,
                     self._weights)

  def gradient_contribution(self) -> np.ndarray:
    return _l2_gradient(self._targets, self.expectations, self.counts,
                        self._weights)


class OneLabelL2RangeGEConstraints(OneLabelGEConstraints):
  """Criterion keeping label probabilities within a band.

  For each constrained (feature, label) pair, the penalty is
  -w * (bound - E / count)^2 when E / count falls outside [lower, upper], with
  bound being the violated end of the band, and zero inside the band.
  """

  def __init__(self, num_features: int,
               state_label_map: Optional[transducers.StateLabelMap] = None):
    super().__init__(num_features, state_label_map)
    self._lower: dict[tuple[int, int], float] = {}
    self._upper: dict[tuple[int, int], float] = {}
    self._pair_weights: dict[tuple[int, int], float] = {}

  def add_constraint(self, feature: int, label: int, lower: float,
                     upper: float, weight: float = 1.0) -> None:
    """Constrains the probability of `label` where `feature` fires.

    Args:
      feature: Feature index, or num_features for every position.
      label: Constrained label.
      lower: Lower end of the band.
      upper: Upper end of the band.
      weight: Strength of the criterion.
    """
    if not 0 <= lower <= upper <= 1:
      raise ValueError(
          f'Expected 0 <= lower <= upper <= 1, got lower={lower} '
          f'upper={upper}')
    if feature not in self._feature_index:
      self._add_feature(feature, 0.0)
    if (feature, label) in self._pair_weights:
      raise ValueError(
          f'Label {label} of feature {feature} is already constrained')
    self._lower[feature, label] = lower
    self._upper[feature, label] = upper
    self._pair_weights[feature, label] = weight

  def _pairs(self):
    for (feature, label), weight in self._pair_weights.items():
      yield (self._feature_index[feature], label, self._lower[feature, label],
             self._upper[feature, label], weight)

  def value(self) -> float:
    value = 0.0
    for k, label, lower, upper, weight in self._pairs():
      if self.counts[k] == 0:
        continue
      ratio = self.expectations[k, label] / self.counts[k]
      if ratio < lower:
        value -= weight * (lower - ratio)**2
      elif ratio > upper:
        value -= weight * (ratio - upper)**2
    return value

  def gradient_contribution(self) -> np.ndarray:
    gradient = np.zeros_like(self.expectations)
    for k, label, lower, upper, weight in self._pairs():
      count = self.counts[k]
      if count == 0:
        continue
      expectation = self.expectations[k, label]
      ratio = expectation / count
      if ratio < lower:
        bound = lower
      elif ratio > upper:
        bound = upper
      else:
        continue
      gradient[k, label] = 2 * weight * (bound / count -
                                         expectation / count**2)
    return gradient


class TwoLabelGEConstraints(_FeatureGEConstraints):
  """Criteria on the label bigram distribution where a feature fires.

  Transitions at position 0 leave the initial state and have no previous
  label, so they neither count nor accumulate.
  """

  needs_xis = True

  def _label_shape(self) -> tuple[int, ...]:
    return (self.num_labels, self.num_labels)

  def add_constraint(self, feature: int, target: np.ndarray,
                     weight: float = 1.0) -> None:
    """Constrains the label bigram distribution where `feature` fires.

    Args:
      feature: Feature index, or num_features for every position.
      target: [num_labels, num_labels] target distribution over (previous
        label, current label).
      weight: Strength of the criterion.
    """
    target = np.asarray(target, dtype=np.float64)
    if target.ndim != 2 or target.shape[0] != target.shape[1]:
      raise ValueError(
          f'Expected a square target matrix, got shape {target.shape}')
    self._add_feature(feature, weight)
    if len(self._features) == 1:
      self._targets = target[np.newaxis]
    else:
      self._targets = np.concatenate([self._targets, target[np.newaxis]])

  def _counted_positions(self, fires: np.ndarray) -> np.ndarray:
    return fires[1:]

  def compute_expectations(
      self, lattice_list: Sequence[Optional[lattices.SumLattice]]) -> None:
    indicator = self._map.indicator()
    for lattice in lattice_list:
      if lattice is None or lattice.is_impossible:
        continue
      if lattice.xis is None:
        raise ValueError(
            f'{type(self).__name__} needs lattices computed with save_xis=True')
      bigram_probs = np.einsum('nij,il,jm->nlm', np.exp(lattice.xis[1:]),
                               indicator, indicator)
      fires = self._firing(np.asarray(lattice.inputs))[1:].astype(np.float64)
      self.expectations += np.einsum('nk,nlm->klm', fires, bigram_probs)

  def composite_values(self, inputs: np.ndarray) -> np.ndarray:
    fires = self._firing(inputs).astype(np.float64)
    fires[:1] = 0
    indicator = self._map.indicator()
    return np.einsum('nk,klm,il,jm->nij', fires, self.gradient_contribution(),
                     indicator, indicator)


class TwoLabelKLGEConstraints(TwoLabelGEConstraints):
  """KL divergence criterion over label bigrams."""

  def value(self) -> float:
    return _kl_value(self._targets, self.expectations, self.counts,
                     self._weights)

  def gradient_contribution(self) -> np.ndarray:
    return _kl_gradient(self._targets, self.expectations, self._weights)


class TwoLabelL2GEConstraints(TwoLabelGEConstraints):
  """Squared error criterion over label bigrams."""

  def value(self) -> float:
    return _l2_value(self._targets, self.expectations, self.counts,
                     self._weights)

  def gradient_contribution(self) -> np.ndarray:
    return _l2_gradient(self._targets, self.expectations, self.counts,
                        self._weights)


class SelfTransitionGEConstraint(GEConstraints):
  """Global criterion on the probability of staying in the same state.

  E is the expected number of self-transitions over all tokens, n the number
  of tokens and p the target probability. The value is the negated KL
  divergence between Bernoulli(p) and Bernoulli(E / n), scaled by the weight.
  """

  needs_xis = True

  def __init__(self, target: float, weight: float = 1.0):
    if not 0 <= target <= 1:
      raise ValueError(f'target should be a probability, got {target}')
    self.target = target
    self.weight = weight
    self.num_tokens = 0
    self.expectation = 0.0
    self._num_states = None

  def set_state_label_map(self, state_label_map: transducers.StateLabelMap):
    self._num_states = state_label_map.num_states

  def pre_process(self, data: Sequence[np.ndarray]) -> np.ndarray:
    self.num_tokens = sum(len(inputs) for inputs in data)
    return np.ones([len(data)], dtype=bool)

  def zero_expectations(self) -> None:
    self.expectation = 0.0

  def compute_expectations(
      self, lattice_list: Sequence[Optional[lattices.SumLattice]]) -> None:
    for lattice in lattice_list:
      if lattice is None or lattice.is_impossible:
        continue
      if lattice.xis is None:
        raise ValueError(
            f'{type(self).__name__} needs lattices computed with save_xis=True')
      self.expectation += float(
          np.sum(np.exp(np.diagonal(lattice.xis, axis1=1, axis2=2))))
    logging.debug('Self transition expectation: %s',
                  self.expectation / max(self.num_tokens, 1))

  def value(self) -> float:
    p = self.target
    if not self.num_tokens:
      return 0.0
    ratio = self.expectation / self.num_tokens
    value = 0.0
    with np.errstate(divide='ignore'):
      if p > 0:
        value += p * (np.log(ratio) - np.log(p))
      if p < 1:
        value += (1 - p) * (np.log1p(-ratio) - np.log1p(-p))
    return float(self.weight * value)

  def composite_values(self, inputs: np.ndarray) -> np.ndarray:
    num_positions = len(inputs)
    num_states = self._num_states
    p = self.target
    stay = self.weight * p / self.expectation if self.expectation > 0 else 0.0
    leave_mass = self.num_tokens - self.expectation
    leave = self.weight * (1 - p) / leave_mass if leave_mass > 0 else 0.0
    per_transition = np.where(np.eye(num_states, dtype=bool), stay, leave)
    return np.broadcast_to(per_transition,
                           (num_positions, num_states, num_states)).copy()

  def copy(self) -> 'SelfTransitionGEConstraint':
    result = copy.copy(self)
    result.zero_expectations()
    return result

  def merge(self, other: GEConstraints) -> None:
    self.expectation += other.expectation
