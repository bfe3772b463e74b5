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
"""Tests for lattices."""

import itertools

from absl.testing import absltest
from flax import linen as nn
import jax
import jax.numpy as jnp
from lincrf import crfs
from lincrf import lattices
from lincrf import transducers
from lincrf import weight_fns
import numpy as np
import numpy.testing as npt

INF = np.inf


def make_crf():
  return crfs.CRF.fully_connected(
      3, ['O', 'B', 'I'], kernel_init=nn.initializers.normal(1.0))


def make_table_crf(table, initial, final):
  num_states = table.shape[-1]
  return crfs.CRF(
      weight_fns.TableWeightFn(
          table=np.asarray(table, dtype=np.float64),
          initial=np.asarray(initial, dtype=np.float64),
          final=np.asarray(final, dtype=np.float64)),
      state_names=[f's{i}' for i in range(num_states)],
      num_features=1)


def make_two_state_chain():
  """State 0 starts with weight 1, then moves to state 1 and stays there."""
  table = np.array([[[-INF, 1.], [-INF, 1.]]])
  crf = make_table_crf(table, [1., -INF], [0., 0.])
  return crf, jnp.ones([3, 1])


def all_paths(weights):
  """Yields (states, weight) of every path through a lattice."""
  initial = np.asarray(weights.initial)
  final = np.asarray(weights.final)
  transitions = np.asarray(weights.transitions)
  num_positions, num_states, _ = transitions.shape
  for states in itertools.product(range(num_states), repeat=num_positions + 1):
    weight = initial[states[0]] + final[states[-1]]
    for ip in range(num_positions):
      weight += transitions[ip, states[ip], states[ip + 1]]
    yield states, weight


class SumLatticeTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.inputs = jax.random.uniform(jax.random.PRNGKey(1), [4, 3])

  def test_total_weight(self):
    lattice = lattices.SumLattice(self.crf, self.inputs)
    weights = [w for _, w in all_paths(lattice.weights)]
    self.assertAlmostEqual(lattice.total_weight, np.logaddexp.reduce(weights))
    self.assertAlmostEqual(lattice.total_weight,
                           lattice.backward_total_weight)
    self.assertFalse(lattice.is_impossible)

  def test_marginals(self):
    lattice = lattices.SumLattice(self.crf, self.inputs, save_xis=True)
    gammas = np.exp(lattice.gammas)
    xis = np.exp(lattice.xis)
    with self.subTest('gammas sum to one'):
      npt.assert_allclose(gammas.sum(axis=1), np.ones(5))
    with self.subTest('xis agree with gammas'):
      npt.assert_allclose(xis.sum(axis=2), gammas[:-1], atol=1e-12)
      npt.assert_allclose(xis.sum(axis=1), gammas[1:], atol=1e-12)
    with self.subTest('accessors'):
      self.assertAlmostEqual(
          lattice.gamma_probability(2, 1), gammas[2, 1])
      self.assertAlmostEqual(
          lattice.xi_probability(1, 0, 2), xis[1, 0, 2])
    with self.subTest('label marginals'):
      label_marginals = lattice.label_marginals(self.crf.state_label_map())
      npt.assert_allclose(label_marginals, gammas[1:])

  def test_xis_not_saved(self):
    lattice = lattices.SumLattice(self.crf, self.inputs)
    self.assertIsNone(lattice.xis)
    self.assertIsNone(lattice.expectations)
    with self.assertRaisesRegex(ValueError, 'save_xis'):
      lattice.xi_probability(0, 0, 0)

  def test_deterministic(self):
    first = lattices.SumLattice(self.crf, self.inputs, save_xis=True)
    second = lattices.SumLattice(self.crf, self.inputs, save_xis=True)
    self.assertEqual(first.total_weight, second.total_weight)
    npt.assert_array_equal(first.gammas, second.gammas)
    npt.assert_array_equal(first.xis, second.xis)

  def test_constrained(self):
    unconstrained = lattices.SumLattice(self.crf, self.inputs)
    output = [0, 1, 2, 0]
    constrained = lattices.SumLattice(
        self.crf, self.inputs, output, save_xis=True)
    self.assertLessEqual(constrained.total_weight, unconstrained.total_weight)
    # Only the initial state is free.
    gammas = np.exp(constrained.gammas)
    npt.assert_allclose(gammas[1:], np.eye(3)[output], atol=1e-12)
    with self.subTest('unconstrained positions'):
      partial = lattices.SumLattice(self.crf, self.inputs, [0, -1, 2, 0])
      self.assertLessEqual(constrained.total_weight, partial.total_weight)
      self.assertLessEqual(partial.total_weight, unconstrained.total_weight)
    with self.subTest('length mismatch'):
      with self.assertRaisesRegex(ValueError, 'does not match'):
        lattices.SumLattice(self.crf, self.inputs, [0, 1])

  def test_cached_dots(self):
    lattice = lattices.SumLattice(self.crf, self.inputs)
    cached = lattices.CachedDotSumLattice(
        self.crf, self.inputs, self.crf.weights(self.inputs).transitions)
    self.assertAlmostEqual(cached.total_weight, lattice.total_weight)
    npt.assert_allclose(cached.gammas, lattice.gammas)

  def test_bad_weights(self):
    weights = self.crf.weights(self.inputs[:2])
    with self.assertRaisesRegex(ValueError, 'Expected transition weights'):
      lattices.SumLattice(self.crf, self.inputs, weights=weights)

  def test_impossible(self):
    table = np.full([1, 2, 2], -INF)
    crf = make_table_crf(table, [0., 0.], [0., 0.])
    inputs = jnp.zeros([3, 1])
    lattice = lattices.SumLattice(
        crf, inputs, save_xis=True, with_expectations=True)
    self.assertTrue(lattice.is_impossible)
    self.assertEqual(lattice.total_weight, transducers.IMPOSSIBLE_WEIGHT)
    npt.assert_array_equal(lattice.gammas, np.full([4, 2], -INF))
    npt.assert_array_equal(lattice.xis, np.full([3, 2, 2], -INF))

  def test_impossible_keeps_backward_sentinel(self):
    # State 1 is the only final state but can't be reached from state 0.
    table = np.array([[[-INF, -INF], [-INF, 0.]]])
    crf = make_table_crf(table, [0., -INF], [-INF, 0.])
    lattice = lattices.SumLattice(crf, jnp.zeros([2, 1]), save_xis=True)
    self.assertTrue(lattice.is_impossible)
    npt.assert_array_equal(lattice.beta, np.full([3, 2], -INF))
    npt.assert_array_equal(lattice.gammas, np.full([3, 2], -INF))
    npt.assert_array_equal(lattice.xis, np.full([2, 2, 2], -INF))

  def test_invalid_marginals(self):
    table = np.array([[[np.nan, 0.], [0., 0.]]])
    crf = make_table_crf(table, [0., 0.], [0., 0.])
    with self.assertRaisesRegex(lattices.MarginalProbabilityError, 'gamma'):
      lattices.SumLattice(crf, jnp.zeros([2, 1]))

  def test_two_state_chain(self):
    crf, inputs = make_two_state_chain()
    lattice = lattices.SumLattice(crf, inputs, save_xis=True)
    # The only path is 0 1 1 1, with weight 1 + 1 + 1 + 1.
    self.assertEqual(lattice.total_weight, 4.)
    self.assertEqual(lattice.gamma_probability(0, 0), 1.)
    self.assertEqual(lattice.gamma_probability(0, 1), 0.)
    self.assertEqual(lattice.gamma_probability(1, 0), 0.)
    self.assertEqual(lattice.gamma_probability(1, 1), 1.)
    self.assertEqual(lattice.xi_probability(1, 1, 1), 1.)
    self.assertEqual(lattice.xi_probability(1, 1, 0), 0.)
    npt.assert_allclose(np.exp(lattice.gammas).sum(axis=1), np.ones(4))
    npt.assert_allclose(np.exp(lattice.xis).sum(axis=(1, 2)), np.ones(3))

  def test_unreachable_states(self):
    table = np.array([[[0., 1.], [-INF, 2.]]])
    crf = make_table_crf(table, [0., -INF], [0., 0.])
    lattice = lattices.SumLattice(crf, jnp.zeros([2, 1]))
    # Paths: 0 0 0, 0 0 1, 0 1 1.
    self.assertAlmostEqual(lattice.total_weight,
                           np.logaddexp.reduce([0., 1., 3.]))
    self.assertEqual(lattice.gamma_probability(0, 1), 0.)


class KLSumLatticeTest(absltest.TestCase):

  def test_total_weight(self):
    crf = make_crf()
    inputs = jax.random.uniform(jax.random.PRNGKey(2), [3, 3])
    lattice = lattices.SumLattice(crf, inputs, save_xis=True)
    gamma_probs = np.exp(lattice.gammas)
    xi_probs = np.exp(lattice.xis)
    kl = lattices.KLSumLattice(
        crf, inputs, gamma_probs, xi_probs, with_expectations=True)
    expected = sum(
        np.exp(w - lattice.total_weight) * w
        for _, w in all_paths(lattice.weights))
    self.assertAlmostEqual(kl.total_weight, expected)
    # Expected log probability of a path is minus the entropy.
    self.assertLessEqual(kl.total_weight - lattice.total_weight, 0.)

    with self.subTest('expectations'):
      expectations = lattices.SumLattice(
          crf, inputs, with_expectations=True).expectations
      jax.tree_util.tree_map(
          lambda a, b: npt.assert_allclose(a, b, rtol=1e-6, atol=1e-9),
          kl.expectations, expectations)

    with self.subTest('cached dots'):
      cached = lattices.KLSumLattice(
          crf, inputs, gamma_probs, xi_probs,
          cached_dots=kl.weights.transitions)
      self.assertAlmostEqual(cached.total_weight, kl.total_weight)

    with self.subTest('bad shapes'):
      with self.assertRaisesRegex(ValueError, 'gamma probabilities'):
        lattices.KLSumLattice(crf, inputs, gamma_probs[1:], xi_probs)
      with self.assertRaisesRegex(ValueError, 'xi probabilities'):
        lattices.KLSumLattice(crf, inputs, gamma_probs, xi_probs[1:])

  def test_zero_probability_impossible_weight(self):
    table = np.array([[[0., -INF], [-INF, 0.]]])
    crf = make_table_crf(table, [0., -INF], [0., 0.])
    inputs = jnp.zeros([2, 1])
    gamma_probs = np.array([[1., 0.]] * 3)
    xi_probs = np.array([[[1., 0.], [0., 0.]]] * 2)
    kl = lattices.KLSumLattice(crf, inputs, gamma_probs, xi_probs)
    self.assertEqual(kl.total_weight, 0.)


class NegativeEntropyTest(absltest.TestCase):

  def test_matches_brute_force(self):
    crf = make_crf()
    inputs = jax.random.uniform(jax.random.PRNGKey(3), [3, 3])
    weights = crf.weights(inputs)
    path_weights = np.array([w for _, w in all_paths(weights)])
    log_probs = path_weights - np.logaddexp.reduce(path_weights)
    expected = np.sum(np.exp(log_probs) * log_probs)
    value = float(lattices.negative_entropy(weights))
    self.assertAlmostEqual(value, expected)
    self.assertLess(value, 0.)

  def test_uniform(self):
    crf = make_crf()
    crf.set_parameters(np.zeros(crf.num_parameters()))
    weights = crf.weights(jnp.ones([2, 3]))
    # 3 states over 3 columns give 27 equally likely paths.
    self.assertAlmostEqual(
        float(lattices.negative_entropy(weights)), -np.log(27.))

  def test_single_path(self):
    crf, inputs = make_two_state_chain()
    weights = crf.weights(inputs)
    self.assertAlmostEqual(float(lattices.negative_entropy(weights)), 0.)
    gradient = jax.grad(lattices.negative_entropy)(weights)
    for name, table in [('initial', gradient.initial),
                        ('final', gradient.final),
                        ('transitions', gradient.transitions)]:
      with self.subTest(name):
        self.assertTrue(np.all(np.isfinite(np.asarray(table))))


class MaxLatticeTest(absltest.TestCase):

  def test_best_path(self):
    table = np.array([[[-INF, 1.], [-INF, 1.]]])
    crf = make_table_crf(table, [0., -INF], [0., 0.])
    lattice = lattices.MaxLattice(crf, jnp.zeros([3, 1]))
    self.assertEqual(lattice.best_weight(), 3.)
    self.assertEqual(lattice.best_state_sequence(), [0, 1, 1, 1])
    self.assertEqual(lattice.best_output_sequence(), [1, 1, 1])
    alignments = lattice.best_output_alignments(5)
    self.assertEqual(alignments, [
        lattices.Alignment(states=(0, 1, 1, 1), outputs=(1, 1, 1), weight=3.)
    ])
    self.assertEqual(lattice.confidence(), np.inf)

  def test_two_state_chain(self):
    crf, inputs = make_two_state_chain()
    lattice = lattices.MaxLattice(crf, inputs)
    self.assertEqual(lattice.best_weight(), 4.)
    self.assertEqual(lattice.best_state_sequence(), [0, 1, 1, 1])

  def test_matches_brute_force(self):
    table = np.asarray(jax.random.normal(jax.random.PRNGKey(0), [2, 3, 3]))
    initial = np.asarray(jax.random.normal(jax.random.PRNGKey(1), [3]))
    final = np.asarray(jax.random.normal(jax.random.PRNGKey(2), [3]))
    crf = make_table_crf(table, initial, final)
    inputs = jnp.array([[0.], [1.], [1.], [0.]])
    lattice = lattices.MaxLattice(crf, inputs)
    paths = sorted(all_paths(lattice.weights), key=lambda p: -p[1])

    with self.subTest('best path'):
      best_states, best_weight = paths[0]
      self.assertAlmostEqual(lattice.best_weight(), best_weight)
      self.assertEqual(lattice.best_state_sequence(), list(best_states))
      self.assertEqual(lattice.best_output_sequence(), list(best_states[1:]))

    with self.subTest('n-best'):
      alignments = lattice.best_output_alignments(10)
      self.assertLen(alignments, 10)
      for alignment, (states, weight) in zip(alignments, paths):
        self.assertEqual(alignment.states, states)
        self.assertEqual(alignment.outputs, states[1:])
        self.assertAlmostEqual(alignment.weight, weight)

    with self.subTest('more than available'):
      self.assertLen(lattice.best_output_alignments(1000), 3**5)

    with self.subTest('confidence'):
      self.assertAlmostEqual(lattice.confidence(),
                             np.exp(paths[0][1] - paths[1][1]))

  def test_constrained(self):
    crf = make_crf()
    inputs = jax.random.uniform(jax.random.PRNGKey(1), [4, 3])
    lattice = lattices.MaxLattice(crf, inputs, output=[2, 2, 0, 1])
    self.assertEqual(lattice.best_output_sequence(), [2, 2, 0, 1])

  def test_agrees_with_sum_lattice(self):
    crf = make_crf()
    inputs = jax.random.uniform(jax.random.PRNGKey(3), [5, 3])
    max_lattice = lattices.MaxLattice(crf, inputs)
    sum_lattice = lattices.SumLattice(crf, inputs)
    self.assertLessEqual(max_lattice.best_weight(), sum_lattice.total_weight)

  def test_no_path(self):
    table = np.full([1, 2, 2], -INF)
    crf = make_table_crf(table, [0., 0.], [0., 0.])
    lattice = lattices.MaxLattice(crf, jnp.zeros([2, 1]))
    self.assertEqual(lattice.best_weight(), transducers.IMPOSSIBLE_WEIGHT)
    self.assertEqual(lattice.best_output_alignments(3), [])
    with self.assertRaisesRegex(ValueError, 'No complete path'):
      lattice.best_state_sequence()
    with self.assertRaisesRegex(ValueError, 'no complete path'):
      lattice.confidence()
    with self.assertRaisesRegex(ValueError, 'should be positive'):
      lattice.best_output_alignments(0)


if __name__ == '__main__':
  absltest.main()
