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

"""Sum-product and max-product lattices over linear-chain transducers.

A lattice over an input sequence of N positions has N + 1 columns of states.
Column 0 holds the initial states and column N the final states; reading input
position ip moves from column ip to column ip + 1. All weights are in the log
domain, with IMPOSSIBLE_WEIGHT (-inf) for forbidden transitions and unreachable
states.
"""

from collections.abc import Sequence
import dataclasses
import heapq
from typing import Any, Optional

from absl import logging
import jax
import jax.numpy as jnp
import numpy as np

from lincrf import semirings
from lincrf import transducers

PyTree = Any
LatticeWeights = transducers.LatticeWeights
IMPOSSIBLE_WEIGHT = transducers.IMPOSSIBLE_WEIGHT

# Marginal probabilities may exceed 1 by this much due to rounding.
PROBABILITY_TOLERANCE = 1e-6


class MarginalProbabilityError(ArithmeticError):
  """A marginal probability is outside [0, 1 + PROBABILITY_TOLERANCE]."""


def forward(
    weights: LatticeWeights,
    semiring: semirings.Semiring = semirings.Log
) -> tuple[jnp.ndarray, jnp.ndarray]:
  """Shortest distance computed with the forward algorithm.

  Args:
    weights: Lattice weights.
    semiring: Log for the log partition function, MaxTropical for the best path
      weight.

  Returns:
    (total, alpha) tuple,
    -   total: [] total weight of all complete paths.
    -   alpha: [num_positions + 1, num_states] forward weights.
  """

  def step(alpha, transitions):
    next_alpha = semiring.forward_step(alpha, transitions)
    return next_alpha, next_alpha

  _, alphas = jax.lax.scan(step, weights.initial, weights.transitions)
  alpha = jnp.concatenate([weights.initial[jnp.newaxis], alphas], axis=0)
  total = semiring.sum(semiring.times(alpha[-1], weights.final), axis=0)
  return total, alpha


def backward(
    weights: LatticeWeights,
    semiring: semirings.Semiring = semirings.Log
) -> tuple[jnp.ndarray, jnp.ndarray]:
  """Shortest distance computed with the backward algorithm.

  Args:
    weights: Lattice weights.
    semiring: Semiring to use for shortest distance computation.

  Returns:
    (total, beta) tuple,
    -   total: [] total weight of all complete paths. Equal to the total from
        forward() up to rounding.
    -   beta: [num_positions + 1, num_states] backward weights.
  """

  def step(beta, transitions):
    prev_beta = semiring.backward_step(transitions, beta)
    return prev_beta, prev_beta

  _, betas = jax.lax.scan(
      step, weights.final, weights.transitions, reverse=True)
  beta = jnp.concatenate([betas, weights.final[jnp.newaxis]], axis=0)
  total = semiring.sum(semiring.times(weights.initial, beta[0]), axis=0)
  return total, beta


def log_marginals(weights: LatticeWeights, alpha: jnp.ndarray,
                  beta: jnp.ndarray,
                  total: jnp.ndarray) -> tuple[jnp.ndarray, jnp.ndarray]:
  """Log marginal probabilities of states and transitions.

  Only meaningful when `total` is finite.

  Args:
    weights: Lattice weights.
    alpha: [num_positions + 1, num_states] forward weights.
    beta: [num_positions + 1, num_states] backward weights.
    total: [] log partition function.

  Returns:
    (gamma, xi) tuple,
    -   gamma: [num_positions + 1, num_states] log probability of being in a
        state at a column.
    -   xi: [num_positions, num_states, num_states] log probability of taking
        a transition at a position.
  """
  gamma = alpha + beta - total
  xi = (
      alpha[:-1, :, jnp.newaxis] + weights.transitions +
      beta[1:, jnp.newaxis, :] - total)
  return gamma, xi


def transition_marginals(weights: LatticeWeights) -> jnp.ndarray:
  """[num_positions, num_states, num_states] transition probabilities.

  Differentiable with respect to `weights`. The lattice must have at least one
  complete path.

  Args:
    weights: Lattice weights.

  Returns:
    Marginal probabilities of all transitions.
  """
  total, alpha = forward(weights)
  _, beta = backward(weights)
  _, xi = log_marginals(weights, alpha, beta, total)
  return jnp.exp(xi)


def _expected_path_weight(log_probs: jnp.ndarray,
                          weights: jnp.ndarray) -> jnp.ndarray:
  # Impossible weights only occur where the probability is 0.
  finite = jnp.isfinite(weights)
  return jnp.sum(jnp.exp(log_probs) * jnp.where(finite, weights, 0.))


def negative_entropy(weights: LatticeWeights) -> jnp.ndarray:
  """Negative entropy sum_y p(y) log p(y) of the path distribution.

  Computed as the expected path weight minus the log partition function, so
  that it is differentiable with respect to `weights`. Its gradient with
  respect to a path weight is the covariance between that weight and the log
  probability of the path. The lattice must have at least one complete path.

  Args:
    weights: Lattice weights.

  Returns:
    [] negative entropy, at most 0.
  """
  total, alpha = forward(weights)
  _, beta = backward(weights)
  gamma, xi = log_marginals(weights, alpha, beta, total)
  expected = (
      _expected_path_weight(gamma[0], weights.initial) +
      _expected_path_weight(xi, weights.transitions) +
      _expected_path_weight(gamma[-1], weights.final))
  return expected - total


@jax.jit
def _sum_product(weights: LatticeWeights):
  total, alpha = forward(weights)
  backward_total, beta = backward(weights)
  gamma, xi = log_marginals(weights, alpha, beta, total)
  return total, backward_total, alpha, beta, gamma, xi


def _check_probabilities(name: str, log_probs: np.ndarray) -> None:
  probs = np.exp(log_probs)
  is_valid = (probs >= 0) & (probs <= 1 + PROBABILITY_TOLERANCE)
  if not np.all(is_valid):
    index = tuple(int(i) for i in np.argwhere(~is_valid)[0])
    raise MarginalProbabilityError(
        f'{name}{list(index)} = {probs[index]!r} is not a probability in '
        f'[0, {1 + PROBABILITY_TOLERANCE}]')


def _check_weights(weights: LatticeWeights, num_positions: int,
                   num_states: int) -> None:
  expected = (num_positions, num_states, num_states)
  if weights.transitions.shape != expected:
    raise ValueError(
        f'Expected transition weights of shape {expected}, got '
        f'{weights.transitions.shape}')
  if weights.initial.shape != (num_states,) or weights.final.shape != (
      num_states,):
    raise ValueError(
        f'Expected initial and final weights of shape ({num_states},), got '
        f'{weights.initial.shape} and {weights.final.shape}')


def constrain_to_output(weights: LatticeWeights, output_table: np.ndarray,
                        output: Sequence[int]) -> LatticeWeights:
  """Removes the transitions that don't emit the target output.

  Args:
    weights: Lattice weights over N positions.
    output_table: [num_states, num_states] output label of each transition.
    output: Length N target output labels. A negative label leaves its
      position unconstrained.

  Returns:
    LatticeWeights where transitions emitting anything else than output[ip] at
    position ip have IMPOSSIBLE_WEIGHT.

  Raises:
    ValueError: If the output and input lengths differ.
  """
  output = np.asarray(output, dtype=np.int32)
  if output.shape != (weights.num_positions,):
    raise ValueError(
        f'Output sequence of length {output.size} does not match input '
        f'sequence of length {weights.num_positions}')
  target = output[:, np.newaxis, np.newaxis]
  allowed = (output_table[np.newaxis] == target) | (target < 0)
  return weights.replace(
      transitions=jnp.where(allowed, weights.transitions, IMPOSSIBLE_WEIGHT))


class SumLattice:
  """Forward-backward lattice under the log semiring.

  All tables are computed eagerly on construction and stored as numpy arrays.
  When no complete path exists, `total_weight` is IMPOSSIBLE_WEIGHT and the
  backward and marginal tables keep that sentinel. This is a valid outcome:
  the sequence has zero probability under the model.

  Attributes:
    transducer: Model the weights come from.
    inputs: [num_positions, num_features] input sequence.
    output: Optional target output sequence the paths are constrained to.
    weights: Lattice weights actually used, constraints included.
    total_weight: Log partition function, from the forward pass.
    backward_total_weight: Log partition function, from the backward pass.
    alpha: [num_positions + 1, num_states] forward weights.
    beta: [num_positions + 1, num_states] backward weights.
    gammas: [num_positions + 1, num_states] log state marginals.
    xis: [num_positions, num_states, num_states] log transition marginals, or
      None unless `save_xis`.
    expectations: Expected sufficient statistics of the model parameters, or
      None unless `with_expectations`.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               inputs: jnp.ndarray,
               output: Optional[Sequence[int]] = None,
               *,
               save_xis: bool = False,
               with_expectations: bool = False,
               weights: Optional[LatticeWeights] = None):
    """Computes the lattice.

    Args:
      transducer: Model supplying the lattice weights.
      inputs: [num_positions, num_features] input sequence.
      output: Optional length num_positions target output sequence.
      save_xis: Whether to keep the transition marginals.
      with_expectations: Whether to compute the expected sufficient statistics
        of the model parameters.
      weights: Precomputed lattice weights over `inputs`. Computed from the
        transducer if None.
    """
    self.transducer = transducer
    self.inputs = jnp.asarray(inputs)
    self.output = output
    num_positions = self.inputs.shape[0]
    num_states = transducer.num_states()
    if weights is None:
      weights = transducer.weights(self.inputs)
    _check_weights(weights, num_positions, num_states)
    if output is not None:
      weights = constrain_to_output(weights, transducer.output_table(), output)
    self.weights = weights

    total, backward_total, alpha, beta, gamma, xi = _sum_product(weights)
    self.total_weight = float(total)
    self.backward_total_weight = float(backward_total)
    self.alpha = np.asarray(alpha)
    self.beta = np.asarray(beta)
    self.expectations = None

    if self.is_impossible:
      logging.debug('Lattice over %d positions has no complete path.',
                    num_positions)
      self.beta = np.full([num_positions + 1, num_states], IMPOSSIBLE_WEIGHT)
      self.gammas = np.full([num_positions + 1, num_states], IMPOSSIBLE_WEIGHT)
      self.xis = None
      if save_xis:
        self.xis = np.full([num_positions, num_states, num_states],
                           IMPOSSIBLE_WEIGHT)
      if with_expectations:
        zeros = jax.tree_util.tree_map(jnp.zeros_like, weights)
        self.expectations = transducer.expectations(self.inputs, zeros)
      return

    gamma = np.asarray(gamma)
    xi = np.asarray(xi)
    _check_probabilities('gamma', gamma)
    _check_probabilities('xi', xi)
    self.gammas = gamma
    self.xis = xi if save_xis else None
    if with_expectations:
      self.expectations = transducer.expectations(
          self.inputs, self._marginal_probabilities(gamma, xi))

  @staticmethod
  def _marginal_probabilities(gamma: np.ndarray,
                              xi: np.ndarray) -> LatticeWeights:
    return LatticeWeights(
        initial=np.exp(gamma[0]), final=np.exp(gamma[-1]),
        transitions=np.exp(xi))

  @property
  def num_positions(self) -> int:
    return self.inputs.shape[0]

  @property
  def num_states(self) -> int:
    return self.gammas.shape[1]

  @property
  def is_impossible(self) -> bool:
    return self.total_weight == IMPOSSIBLE_WEIGHT

  def gamma_probability(self, ip: int, state: int) -> float:
    return float(np.exp(self.gammas[ip, state]))

  def xi_probability(self, ip: int, source: int, destination: int) -> float:
    if self.xis is None:
      raise ValueError('Transition marginals were not saved, use save_xis=True')
    return float(np.exp(self.xis[ip, source, destination]))

  def label_marginals(
      self, state_label_map: transducers.StateLabelMap) -> np.ndarray:
    """[num_positions, num_labels] output label distribution per position."""
    return np.exp(self.gammas[1:]) @ state_label_map.indicator()


class CachedDotSumLattice(SumLattice):
  """SumLattice over precomputed transition weights.

  Used when the same model weights are reused across many lattice computations,
  e.g. while optimizing auxiliary parameters with the model held fixed.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               inputs: jnp.ndarray,
               cached_dots: jnp.ndarray,
               output: Optional[Sequence[int]] = None,
               **kwargs):
    weights = LatticeWeights(
        initial=jnp.asarray(transducer.initial_weights()),
        final=jnp.asarray(transducer.final_weights()),
        transitions=jnp.asarray(cached_dots))
    super().__init__(transducer, inputs, output, weights=weights, **kwargs)


class PRSumLattice(SumLattice):
  """SumLattice with auxiliary posterior-regularization weights added.

  The auxiliary model contributes a weight to every transition on top of the
  base model weight. The resulting marginals define the constrained
  distribution q of posterior regularization.

  Attributes:
    constraint_expectations: Expectations of the auxiliary model constraints
      under this lattice, or None unless `with_constraint_expectations`.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               aux_model: Any,
               inputs: jnp.ndarray,
               cached_dots: Optional[jnp.ndarray] = None,
               *,
               save_xis: bool = False,
               with_constraint_expectations: bool = False):
    inputs = jnp.asarray(inputs)
    if cached_dots is None:
      base = transducer.weights(inputs)
    else:
      base = LatticeWeights(
          initial=jnp.asarray(transducer.initial_weights()),
          final=jnp.asarray(transducer.final_weights()),
          transitions=jnp.asarray(cached_dots))
    weights = base.replace(
        transitions=base.transitions + aux_model.transition_weights(inputs))
    super().__init__(transducer, inputs, weights=weights, save_xis=save_xis)
    self.constraint_expectations = None
    if with_constraint_expectations:
      self.constraint_expectations = aux_model.lattice_expectations(self)


class KLSumLattice:
  """Closed-form weight of a lattice under known marginals.

  Given marginal probabilities p of a distribution over paths, computes the
  expected model path weight

    sum p(initial) * initial + sum p(xi) * transitions + sum p(final) * final

  without any dynamic program. Zero probabilities never multiply impossible
  weights.

  Attributes:
    weights: Model lattice weights used. Can be reused as cached dots.
    total_weight: Expected path weight.
    expectations: Expected sufficient statistics of the model parameters under
      the given marginals, or None unless `with_expectations`.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               inputs: jnp.ndarray,
               gamma_probs: np.ndarray,
               xi_probs: np.ndarray,
               cached_dots: Optional[jnp.ndarray] = None,
               *,
               with_expectations: bool = False):
    inputs = jnp.asarray(inputs)
    num_positions = inputs.shape[0]
    num_states = transducer.num_states()
    gamma_probs = np.asarray(gamma_probs)
    xi_probs = np.asarray(xi_probs)
    if gamma_probs.shape != (num_positions + 1, num_states):
      raise ValueError(
          f'Expected gamma probabilities of shape '
          f'{(num_positions + 1, num_states)}, got {gamma_probs.shape}')
    if xi_probs.shape != (num_positions, num_states, num_states):
      raise ValueError(
          f'Expected xi probabilities of shape '
          f'{(num_positions, num_states, num_states)}, got {xi_probs.shape}')
    if cached_dots is None:
      weights = transducer.weights(inputs)
    else:
      weights = LatticeWeights(
          initial=jnp.asarray(transducer.initial_weights()),
          final=jnp.asarray(transducer.final_weights()),
          transitions=jnp.asarray(cached_dots))
    _check_weights(weights, num_positions, num_states)
    self.transducer = transducer
    self.inputs = inputs
    self.weights = weights
    self.total_weight = float(
        _expected_weight(gamma_probs[0], np.asarray(weights.initial)) +
        _expected_weight(xi_probs, np.asarray(weights.transitions)) +
        _expected_weight(gamma_probs[-1], np.asarray(weights.final)))
    self.expectations = None
    if with_expectations:
      self.expectations = transducer.expectations(
          inputs,
          LatticeWeights(
              initial=gamma_probs[0],
              final=gamma_probs[-1],
              transitions=xi_probs))


def _expected_weight(probs: np.ndarray, weights: np.ndarray) -> float:
  return float(np.sum(np.where(probs > 0, probs * weights, 0)))


@dataclasses.dataclass(frozen=True)
class Alignment:
  """A complete path through a lattice.

  Attributes:
    states: Length num_positions + 1 state indices, starting with the initial
      state.
    outputs: Length num_positions output labels, outputs[ip] being emitted
      while reading input position ip.
    weight: Total path weight, initial and final weights included.
  """
  states: tuple[int, ...]
  outputs: tuple[int, ...]
  weight: float


def _rank_key(candidate: tuple[float, int, int]) -> tuple[float, int, int]:
  # Higher weight first, then lower predecessor state, then lower rank.
  weight, state, rank = candidate
  return weight, -state, -rank


class MaxLattice:
  """Viterbi lattice under the max tropical semiring.

  Attributes:
    transducer: Model the weights come from.
    inputs: [num_positions, num_features] input sequence.
    weights: Lattice weights actually used, constraints included.
    delta: [num_positions + 1, num_states] weight of the best partial path
      ending in each state.
  """

  def __init__(self,
               transducer: transducers.Transducer,
               inputs: jnp.ndarray,
               output: Optional[Sequence[int]] = None,
               *,
               weights: Optional[LatticeWeights] = None):
    self.transducer = transducer
    self.inputs = jnp.asarray(inputs)
    num_positions = self.inputs.shape[0]
    num_states = transducer.num_states()
    if weights is None:
      weights = transducer.weights(self.inputs)
    _check_weights(weights, num_positions, num_states)
    self._output_table = transducer.output_table()
    if output is not None:
      weights = constrain_to_output(weights, self._output_table, output)
    self.weights = weights
    if not np.any(np.asarray(weights.initial) > IMPOSSIBLE_WEIGHT):
      logging.warning('Viterbi: no initial states!')
    total, delta = forward(weights, semirings.MaxTropical)
    self._best_weight = float(total)
    self.delta = np.asarray(delta)
    self._alignments: list[Alignment] = []

  @property
  def num_positions(self) -> int:
    return self.inputs.shape[0]

  def best_weight(self) -> float:
    return self._best_weight

  def best_state_sequence(self) -> list[int]:
    """States on the highest weight path, num_positions + 1 of them.

    The path is found by differentiating the best path weight with respect to
    the lattice weights: under the max tropical semiring, exactly the weights
    on the best path receive a gradient of 1.

    Returns:
      State indices, starting with the initial state.

    Raises:
      ValueError: If there is no complete path.
    """
    self._check_viable()
    num_states = self.delta.shape[1]
    grads = jax.grad(
        lambda w: forward(w, semirings.MaxTropical)[0])(self.weights)
    start = int(np.argmax(np.asarray(grads.initial)))
    steps = np.asarray(grads.transitions).reshape(
        [self.num_positions, num_states * num_states])
    return [start] + [int(k) % num_states for k in np.argmax(steps, axis=1)]

  def best_output_sequence(self) -> list[int]:
    states = self.best_state_sequence()
    return [
        int(self._output_table[i, j]) for i, j in zip(states[:-1], states[1:])
    ]

  def best_output_alignments(self, n: int) -> list[Alignment]:
    """The n highest weight complete paths, by decreasing weight.

    Fewer than n alignments are returned if the lattice has fewer paths.

    Args:
      n: Number of alignments.

    Returns:
      Alignments sorted by decreasing weight. Ties are broken by preferring
      lower predecessor states from the end of the sequence backwards.
    """
    if n < 1:
      raise ValueError(f'n should be positive, got {n}')
    if len(self._alignments) < n:
      self._alignments = self._n_best(n)
    return self._alignments[:n]

  def confidence(self) -> float:
    """Ratio between the probabilities of the best and second best paths."""
    alignments = self.best_output_alignments(2)
    if not alignments:
      raise ValueError('The lattice has no complete path')
    if len(alignments) < 2:
      return np.inf
    return float(np.exp(alignments[0].weight - alignments[1].weight))

  def _check_viable(self) -> None:
    if self._best_weight == IMPOSSIBLE_WEIGHT:
      raise ValueError(
          f'No complete path over {self.num_positions} input positions')

  def _n_best(self, n: int) -> list[Alignment]:
    initial = np.asarray(self.weights.initial)
    final = np.asarray(self.weights.final)
    transitions = np.asarray(self.weights.transitions)
    num_states = initial.shape[0]

    # cells[s] holds up to n (weight, predecessor, predecessor rank) entries of
    # the best partial paths ending in state s, best first.
    cells = [[(float(initial[s]), -1, -1)] if initial[s] > IMPOSSIBLE_WEIGHT
             else [] for s in range(num_states)]
    history = [cells]
    for ip in range(self.num_positions):
      step = transitions[ip]
      next_cells = []
      for j in range(num_states):
        candidates = [(entry[0] + float(step[i, j]), i, rank)
                      for i in range(num_states)
                      if step[i, j] > IMPOSSIBLE_WEIGHT
                      for rank, entry in enumerate(cells[i])]
        next_cells.append(heapq.nlargest(n, candidates, key=_rank_key))
      history.append(next_cells)
      cells = next_cells

    ends = [(entry[0] + float(final[s]), s, rank)
            for s in range(num_states)
            if final[s] > IMPOSSIBLE_WEIGHT
            for rank, entry in enumerate(cells[s])]
    alignments = []
    for weight, state, rank in heapq.nlargest(n, ends, key=_rank_key):
      states = [state]
      for ip in range(self.num_positions, 0, -1):
        _, state, rank = history[ip][state][rank]
        states.append(state)
      states.reverse()
      outputs = tuple(
          int(self._output_table[i, j])
          for i, j in zip(states[:-1], states[1:]))
      alignments.append(Alignment(tuple(states), outputs, weight))
    return alignments
