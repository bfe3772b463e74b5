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

"""Transducer model interface.

A transducer is a finite-state machine over label states. Reading the input
at position ip moves from a source state to a destination state along a
transition, which emits an output label and carries a log-domain weight. The
lattice engine only talks to models through this interface.
"""

import abc
from collections.abc import Iterator, Sequence
from typing import Any, NamedTuple, Optional

import flax.struct
import jax.numpy as jnp
import numpy as np

PyTree = Any

# Weight of a forbidden transition, or of a state that can't start or finish a
# path.
IMPOSSIBLE_WEIGHT = -np.inf

# Label index of pseudo-states (e.g. a dedicated start state) that don't
# correspond to any output label.
START_LABEL = -2


@flax.struct.dataclass
class LatticeWeights:
  """Weights of all transitions over one input sequence.

  Attributes:
    initial: [num_states] log weights of starting in each state.
    final: [num_states] log weights of ending in each state.
    transitions: [num_positions, num_states, num_states] log weights.
      transitions[ip, i, j] is the weight of moving from state i to state j
      while reading input position ip.
  """
  initial: jnp.ndarray
  final: jnp.ndarray
  transitions: jnp.ndarray

  @property
  def num_positions(self) -> int:
    return self.transitions.shape[0]

  @property
  def num_states(self) -> int:
    return self.initial.shape[-1]


class Transition(NamedTuple):
  destination: int
  output: int
  weight: float


class Transducer(abc.ABC):
  """Interface of models that supply lattice weights.

  Implementations must bump `version` on every parameter update. Objectives
  compare versions to decide whether their cached value and gradient are
  stale.
  """

  @property
  @abc.abstractmethod
  def state_names(self) -> Sequence[str]:
    """Names of the states, indexed by state index."""

  @property
  @abc.abstractmethod
  def version(self) -> int:
    """Parameter version stamp."""

  def num_states(self) -> int:
    return len(self.state_names)

  def state_index(self, name: str) -> int:
    try:
      return list(self.state_names).index(name)
    except ValueError:
      raise ValueError(
          f'Unknown state {name!r}, states are {list(self.state_names)}'
      ) from None

  @abc.abstractmethod
  def initial_weights(self) -> np.ndarray:
    """[num_states] initial log weights."""

  @abc.abstractmethod
  def final_weights(self) -> np.ndarray:
    """[num_states] final log weights."""

  @abc.abstractmethod
  def output_table(self) -> np.ndarray:
    """[num_states, num_states] int output label of each transition.

    -1 marks the absence of a transition.
    """

  @abc.abstractmethod
  def weights(self, inputs: jnp.ndarray) -> LatticeWeights:
    """Computes the weights of all transitions over an input sequence.

    Args:
      inputs: [num_positions, num_features] feature vectors.

    Returns:
      LatticeWeights over the sequence.
    """

  @abc.abstractmethod
  def expectations(self, inputs: jnp.ndarray,
                   marginals: LatticeWeights) -> PyTree:
    """Expected sufficient statistics of the model parameters.

    Args:
      inputs: [num_positions, num_features] feature vectors.
      marginals: Marginal probabilities (not log) of starting in, ending in,
        and transitioning between states, laid out like LatticeWeights.

    Returns:
      PyTree with the structure of the model parameters.
    """

  @abc.abstractmethod
  def parameters(self) -> np.ndarray:
    """Flat float64 copy of the model parameters."""

  @abc.abstractmethod
  def set_parameters(self, parameters: np.ndarray) -> None:
    """Replaces the model parameters from a flat vector."""

  def num_parameters(self) -> int:
    return self.parameters().shape[0]

  def transitions(self,
                  source: int,
                  inputs: jnp.ndarray,
                  ip: int,
                  weights: Optional[LatticeWeights] = None
                 ) -> Iterator[Transition]:
    """Iterates over the possible transitions out of a state.

    Args:
      source: Source state index.
      inputs: [num_positions, num_features] feature vectors.
      ip: Input position read by the transitions.
      weights: Optional weights already computed for `inputs`.

    Yields:
      Transitions with a weight other than IMPOSSIBLE_WEIGHT, by increasing
      destination index.
    """
    if not 0 <= ip < len(inputs):
      raise ValueError(
          f'Input position {ip} is out of range for {len(inputs)} positions')
    if weights is None:
      weights = self.weights(inputs)
    row = np.asarray(weights.transitions[ip, source])
    outputs = self.output_table()[source]
    for destination in np.flatnonzero(row > IMPOSSIBLE_WEIGHT):
      yield Transition(
          int(destination), int(outputs[destination]), float(row[destination]))


class StateLabelMap:
  """Maps transducer states to output labels.

  Several states may share a label (e.g. second order models), and
  pseudo-states map to START_LABEL, which constraint accumulators skip.
  """

  def __init__(self, state_labels: Sequence[int], num_labels: int):
    state_labels = np.asarray(state_labels, dtype=np.int32)
    bad = (state_labels != START_LABEL) & (
        (state_labels < 0) | (state_labels >= num_labels))
    if bad.any():
      raise ValueError(
          f'State labels must be START_LABEL or in [0, {num_labels}), got '
          f'{state_labels.tolist()}')
    self._state_labels = state_labels
    self._num_labels = num_labels

  @classmethod
  def one_to_one(cls, num_labels: int) -> 'StateLabelMap':
    return cls(np.arange(num_labels), num_labels)

  @property
  def num_labels(self) -> int:
    return self._num_labels

  @property
  def num_states(self) -> int:
    return self._state_labels.shape[0]

  @property
  def state_labels(self) -> np.ndarray:
    return self._state_labels.copy()

  def label_index(self, state: int) -> int:
    return int(self._state_labels[state])

  def state_indices(self, label: int) -> list[int]:
    return np.flatnonzero(self._state_labels == label).tolist()

  def indicator(self) -> np.ndarray:
    """[num_states, num_labels] 0/1 matrix, all zeros for START_LABEL rows."""
    result = np.zeros([self.num_states, self._num_labels])
    states = np.flatnonzero(self._state_labels != START_LABEL)
    result[states, self._state_labels[states]] = 1
    return result
