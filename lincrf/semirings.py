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

"""Semirings over log-domain lattice weights.

Both semirings multiply by adding log weights and use -inf
(`IMPOSSIBLE_WEIGHT` in lincrf.transducers) as their zero. They differ in how
they sum:

-   Log sums probabilities, giving log partition functions.
-   MaxTropical keeps the best weight, giving Viterbi scores.

Sums are differentiable even over rows made only of impossible weights, which
occur for unreachable states. Differentiating a Log total yields marginal
probabilities; differentiating a MaxTropical total marks one best path.
"""

from collections.abc import Callable
import dataclasses

import jax
import jax.numpy as jnp

Reduction = Callable[[jnp.ndarray, int], jnp.ndarray]


def _log_sum(a: jnp.ndarray, axis: int) -> jnp.ndarray:
  """log(sum(exp(a))) along `axis`, -inf for an all -inf slice."""
  shift = jax.lax.stop_gradient(jnp.max(a, axis=axis, keepdims=True))
  shift = jnp.where(jnp.isfinite(shift), shift, 0.)
  total = jnp.sum(jnp.exp(a - shift), axis=axis, keepdims=True)
  # Neither branch of the outer where may produce a NaN gradient.
  nonzero = total > 0
  log_total = jnp.where(nonzero,
                        jnp.log(jnp.where(nonzero, total, 1.)), -jnp.inf)
  return jnp.squeeze(shift + log_total, axis=axis)


def _first_max(a: jnp.ndarray, axis: int) -> jnp.ndarray:
  """Maximum along `axis`. Only the first maximal element gets a gradient."""
  index = jnp.argmax(a, axis=axis, keepdims=True)
  return jnp.squeeze(jnp.take_along_axis(a, index, axis=axis), axis=axis)


@dataclasses.dataclass(frozen=True)
class Semiring:
  """A semiring of log weights.

  Attributes:
    name: Name for debugging.
    reduction: Semiring sum of an array along one axis.
  """
  name: str
  reduction: Reduction

  def times(self, a: jnp.ndarray, b: jnp.ndarray) -> jnp.ndarray:
    return a + b

  def sum(self, a: jnp.ndarray, axis: int) -> jnp.ndarray:
    if a.shape[axis] == 0:
      raise ValueError(
          f'Cannot sum over the empty axis {axis} of shape {a.shape}')
    return self.reduction(a, axis)

  def forward_step(self, alpha: jnp.ndarray,
                   transitions: jnp.ndarray) -> jnp.ndarray:
    """Extends [S] source weights through [S, S] transitions."""
    return self.sum(self.times(alpha[:, jnp.newaxis], transitions), axis=0)

  def backward_step(self, transitions: jnp.ndarray,
                    beta: jnp.ndarray) -> jnp.ndarray:
    """Pulls [S] destination weights back through [S, S] transitions."""
    return self.sum(self.times(transitions, beta[jnp.newaxis, :]), axis=1)


Log = Semiring('log', _log_sum)
MaxTropical = Semiring('max_tropical', _first_max)
