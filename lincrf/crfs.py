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

"""Linear-chain conditional random fields."""

from collections.abc import Callable, Sequence
from typing import Any, Optional

import flax
import jax
from jax import flatten_util
import jax.numpy as jnp
import numpy as np

from lincrf import transducers
from lincrf import weight_fns

PyTree = Any


class CRF(transducers.Transducer):
  """A transducer whose weights come from a flax weight function.

  Each state emits one output label. The output of a transition is the label
  of its destination state.

  The parameters are held as a flax parameter PyTree and exposed to optimizers
  as a flat float64 vector. Every update through `set_parameters()` or
  `set_params()` bumps `version`.
  """

  def __init__(self,
               weight_fn: weight_fns.WeightFn,
               state_names: Sequence[str],
               num_features: int,
               state_labels: Optional[Sequence[int]] = None,
               num_labels: Optional[int] = None,
               rng: Optional[jax.Array] = None):
    """Constructor.

    Args:
      weight_fn: Weight function producing the lattice weights.
      state_names: Names of the states.
      num_features: Size of the input feature vectors.
      state_labels: Output label index of each state. Defaults to the state
        index.
      num_labels: Number of output labels. Defaults to 1 + max(state_labels).
      rng: PRNG key for initializing the parameters.
    """
    self._weight_fn = weight_fn
    self._state_names = tuple(state_names)
    num_states = len(self._state_names)
    if state_labels is None:
      state_labels = range(num_states)
    self._state_labels = np.asarray(state_labels, dtype=np.int32)
    if self._state_labels.shape != (num_states,):
      raise ValueError(
          f'Expected {num_states} state labels, got {len(state_labels)}')
    if num_labels is None:
      num_labels = int(self._state_labels.max(initial=-1)) + 1
    self._num_labels = num_labels
    self._num_features = num_features

    connections = weight_fn.connections()
    if connections.shape != (num_states, num_states):
      raise ValueError(
          f'The weight function has {connections.shape} connections but there '
          f'are {num_states} states')
    self._output_table = np.where(connections, self._state_labels[None, :],
                                  -1).astype(np.int32)

    if rng is None:
      rng = jax.random.PRNGKey(0)
    variables = weight_fn.init(rng, jnp.zeros([1, num_features]))
    self._params = flax.core.unfreeze(variables).get('params', {})
    _, self._unravel = flatten_util.ravel_pytree(self._params)
    self._version = 0

  @classmethod
  def fully_connected(cls, num_features: int,
                      label_names: Sequence[str], **kwargs) -> 'CRF':
    """A CRF with one state per label and all transitions allowed."""
    weight_fn = weight_fns.CRFWeightFn(
        num_states=len(label_names), num_features=num_features, **kwargs)
    return cls(weight_fn, label_names, num_features)

  @property
  def weight_fn(self) -> weight_fns.WeightFn:
    return self._weight_fn

  @property
  def state_names(self) -> Sequence[str]:
    return self._state_names

  @property
  def version(self) -> int:
    return self._version

  @property
  def num_features(self) -> int:
    return self._num_features

  @property
  def num_labels(self) -> int:
    return self._num_labels

  @property
  def params(self) -> PyTree:
    return self._params

  def set_params(self, params: PyTree) -> None:
    self._params = params
    self._version += 1

  def state_label_map(self) -> transducers.StateLabelMap:
    return transducers.StateLabelMap(self._state_labels, self._num_labels)

  def output_table(self) -> np.ndarray:
    return self._output_table.copy()

  def weights(self, inputs: jnp.ndarray) -> transducers.LatticeWeights:
    return self._weight_fn.apply({'params': self._params}, jnp.asarray(inputs))

  def initial_weights(self) -> np.ndarray:
    return np.asarray(self._boundary_weights().initial)

  def final_weights(self) -> np.ndarray:
    return np.asarray(self._boundary_weights().final)

  def _boundary_weights(self) -> transducers.LatticeWeights:
    # Initial and final weights don't depend on the inputs.
    return self.weights(jnp.zeros([0, self._num_features]))

  def weights_fn(
      self, inputs: jnp.ndarray
  ) -> Callable[[PyTree], transducers.LatticeWeights]:
    """Lattice weights over `inputs` as a function of the parameters."""
    inputs = jnp.asarray(inputs)

    def weights_fn(params):
      return self._weight_fn.apply({'params': params}, inputs)

    return weights_fn

  def expectations(self, inputs: jnp.ndarray,
                   marginals: transducers.LatticeWeights) -> PyTree:
    weights_fn = self.weights_fn(inputs)
    # Weights are linear in the parameters, so the VJP at the marginal
    # probabilities is the expected feature count.
    weights, vjp_fn = jax.vjp(weights_fn, self._params)
    marginals = jax.tree_util.tree_map(
        lambda m, w: jnp.asarray(m, dtype=w.dtype), marginals, weights)
    (expectations,) = vjp_fn(marginals)
    return expectations

  def flatten(self, tree: PyTree) -> np.ndarray:
    """Flattens a parameter-shaped PyTree into a float64 vector."""
    flat, _ = flatten_util.ravel_pytree(tree)
    return np.asarray(flat, dtype=np.float64)

  def parameters(self) -> np.ndarray:
    return self.flatten(self._params)

  def set_parameters(self, parameters: np.ndarray) -> None:
    parameters = np.asarray(parameters, dtype=np.float64)
    if parameters.shape != (self.num_parameters(),):
      raise ValueError(
          f'Expected {self.num_parameters()} parameters, got shape '
          f'{parameters.shape}')
    self.set_params(self._unravel(jnp.asarray(parameters)))

  def num_parameters(self) -> int:
    return sum(x.size for x in jax.tree_util.tree_leaves(self._params))

  def gaussian_prior(self, variance: float) -> float:
    """Log of a zero-mean Gaussian prior, up to a constant."""
    w = self._finite_parameters()
    return float(-np.sum(w * w) / (2 * variance))

  def gaussian_prior_gradient(self, variance: float) -> np.ndarray:
    return -self._finite_parameters() / variance

  def hyperbolic_prior(self, slope: float, sharpness: float) -> float:
    """Log of a hyperbolic prior, which behaves like L1 away from zero."""
    w = self._finite_parameters()
    return float(-np.sum(np.log(np.cosh(sharpness * w))) * slope / sharpness)

  def hyperbolic_prior_gradient(self, slope: float,
                                sharpness: float) -> np.ndarray:
    return -slope * np.tanh(sharpness * self._finite_parameters())

  def _finite_parameters(self) -> np.ndarray:
    w = self.parameters()
    return np.where(np.isfinite(w), w, 0)
