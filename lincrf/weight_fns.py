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

"""Weight functions.

Weight functions are the only components with trainable parameters. A weight
function maps an input sequence of feature vectors to the LatticeWeights of all
transitions over it.
"""

import abc
from typing import Callable, Optional

import einops
from flax import linen as nn
import jax.numpy as jnp
import numpy as np

from lincrf import transducers

Initializer = Callable[..., jnp.ndarray]


class WeightFn(nn.Module, abc.ABC):
  """Interface for weight functions."""

  @abc.abstractmethod
  def __call__(self, inputs: jnp.ndarray) -> transducers.LatticeWeights:
    """Computes transition weights for an input sequence.

    Args:
      inputs: [num_positions, num_features] feature vectors.

    Returns:
      LatticeWeights over the sequence. Transitions outside `connections()`
      have IMPOSSIBLE_WEIGHT.
    """
    raise NotImplementedError

  @abc.abstractmethod
  def connections(self) -> np.ndarray:
    """[num_states, num_states] bool mask of the transitions that exist."""


def _mask_or_default(mask: Optional[np.ndarray], shape) -> np.ndarray:
  if mask is None:
    return np.ones(shape, dtype=bool)
  mask = np.asarray(mask, dtype=bool)
  if mask.shape != tuple(shape):
    raise ValueError(f'Expected a mask of shape {tuple(shape)}, got '
                     f'{mask.shape}')
  return mask


class CRFWeightFn(WeightFn):
  """Linear-chain CRF weights.

  The weight of moving from state i to state j at position ip is

    transition_weights[i, j] + default_weights[j]
      + inputs[ip] . feature_weights[:, j]

  i.e. observation features are conjoined with the destination state and the
  label bigram is scored by a separate transition table.

  Attributes:
    num_states: Number of states.
    num_features: Size of the input feature vectors.
    connection_mask: Optional [num_states, num_states] bool mask of existing
      transitions. Fully connected if None.
    start_mask: Optional [num_states] bool mask of states that can start a
      path. All states if None.
    final_mask: Optional [num_states] bool mask of states that can end a path.
      All states if None.
    kernel_init: Initializer of the weight tables.
  """

  num_states: int
  num_features: int
  connection_mask: Optional[np.ndarray] = None
  start_mask: Optional[np.ndarray] = None
  final_mask: Optional[np.ndarray] = None
  kernel_init: Initializer = nn.initializers.zeros

  def connections(self) -> np.ndarray:
    return _mask_or_default(self.connection_mask,
                            (self.num_states, self.num_states))

  @nn.compact
  def __call__(self, inputs: jnp.ndarray) -> transducers.LatticeWeights:
    if inputs.ndim != 2 or inputs.shape[-1] != self.num_features:
      raise ValueError(
          f'inputs should have shape [num_positions, {self.num_features}] but '
          f'got {inputs.shape}')
    num_states = self.num_states
    feature_weights = self.param('feature_weights', self.kernel_init,
                                 (self.num_features, num_states))
    default_weights = self.param('default_weights', self.kernel_init,
                                 (num_states,))
    transition_weights = self.param('transition_weights', self.kernel_init,
                                    (num_states, num_states))
    initial_weights = self.param('initial_weights', nn.initializers.zeros,
                                 (num_states,))
    final_weights = self.param('final_weights', nn.initializers.zeros,
                               (num_states,))

    # [num_positions, num_states] weights of entering each destination state.
    emission = jnp.einsum('nf,fs->ns', inputs, feature_weights)
    emission = emission + default_weights
    transitions = transition_weights + einops.rearrange(
        emission, 'n s -> n 1 s')
    impossible = transducers.IMPOSSIBLE_WEIGHT
    transitions = jnp.where(self.connections(), transitions, impossible)
    initial = jnp.where(
        _mask_or_default(self.start_mask, (num_states,)), initial_weights,
        impossible)
    final = jnp.where(
        _mask_or_default(self.final_mask, (num_states,)), final_weights,
        impossible)
    return transducers.LatticeWeights(
        initial=initial, final=final, transitions=transitions)


class TableWeightFn(WeightFn):
  """Weight function that looks up fixed tables, useful for testing.

  Attributes:
    table: [input_vocab_size, num_states, num_states] transition weights. For
      each input position, the 0-th feature is cast into an integer "input
      symbol" which selects the transition table.
    initial: [num_states] initial weights.
    final: [num_states] final weights.
  """
  table: np.ndarray
  initial: np.ndarray
  final: np.ndarray

  def connections(self) -> np.ndarray:
    return np.any(np.asarray(self.table) > transducers.IMPOSSIBLE_WEIGHT,
                  axis=0)

  @nn.compact
  def __call__(self, inputs: jnp.ndarray) -> transducers.LatticeWeights:
    input_vocab_size = self.table.shape[0]
    if inputs.ndim != 2:
      raise ValueError(
          f'inputs should have shape [num_positions, num_features] but got '
          f'{inputs.shape}')
    symbols = inputs[:, 0].astype(jnp.int32)
    symbols = jnp.clip(symbols, 0, input_vocab_size - 1)
    transitions = jnp.asarray(self.table)[symbols]
    return transducers.LatticeWeights(
        initial=jnp.asarray(self.initial, dtype=transitions.dtype),
        final=jnp.asarray(self.final, dtype=transitions.dtype),
        transitions=transitions)
