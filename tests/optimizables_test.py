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
"""Tests for optimizables."""

from absl.testing import absltest
from flax import linen as nn
from lincrf import crfs
from lincrf import ge_constraints
from lincrf import lattices
from lincrf import optimizables
from lincrf import pr_constraints
from lincrf import weight_fns
import numpy as np
import numpy.testing as npt


def make_crf(**kwargs):
  return crfs.CRF.fully_connected(
      2, ['A', 'B'], kernel_init=nn.initializers.normal(0.5), **kwargs)


def make_data(num_sequences=3, seed=0):
  rng = np.random.RandomState(seed)
  return [
      (rng.uniform(size=[length, 2]) > 0.5).astype(np.float64)
      for length in rng.randint(2, 5, size=num_sequences)
  ]


def make_instances(data, seed=0):
  rng = np.random.RandomState(seed)
  return [
      optimizables.Instance(x, rng.randint(0, 2, size=len(x)).tolist())
      for x in data
  ]


def check_gradient(optimizable, eps=1e-5, rtol=1e-4, atol=1e-6):
  parameters = optimizable.parameters()
  gradient = optimizable.value_gradient()
  numerical = np.zeros_like(parameters)
  for i in range(parameters.shape[0]):
    delta = np.zeros_like(parameters)
    delta[i] = eps
    optimizable.set_parameters(parameters + delta)
    plus = optimizable.value()
    optimizable.set_parameters(parameters - delta)
    minus = optimizable.value()
    numerical[i] = (plus - minus) / (2 * eps)
  optimizable.set_parameters(parameters)
  npt.assert_allclose(gradient, numerical, rtol=rtol, atol=atol)


class BatchTest(absltest.TestCase):

  def test_contiguous_batches(self):
    self.assertEqual(
        optimizables.contiguous_batches(10, 3), [(0, 3), (3, 6), (6, 10)])
    self.assertEqual(optimizables.contiguous_batches(2, 5), [(0, 1), (1, 2)])
    self.assertEqual(optimizables.contiguous_batches(4, 1), [(0, 4)])
    self.assertEqual(optimizables.contiguous_batches(0, 2), [(0, 0)])
    with self.assertRaisesRegex(ValueError, 'should be positive'):
      optimizables.contiguous_batches(4, 0)

  def test_run_batches(self):
    for num_threads in [1, 3, 20]:
      with self.subTest(f'num_threads={num_threads}'):
        results = optimizables.run_batches(sum, list(range(10)), num_threads)
        self.assertEqual(sum(results), 45)
        self.assertLen(results, min(num_threads, 10))
    self.assertEqual(
        optimizables.run_batches(list, list(range(5)), 2), [[0, 1], [2, 3, 4]])


class CRFOptimizableByLabelLikelihoodTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.instances = make_instances(make_data())

  def test_value(self):
    optimizable = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, self.instances, gaussian_prior_variance=2.)
    expected = self.crf.gaussian_prior(2.)
    for instance in self.instances:
      expected += (
          lattices.SumLattice(self.crf, instance.inputs,
                              instance.output).total_weight -
          lattices.SumLattice(self.crf, instance.inputs).total_weight)
    self.assertAlmostEqual(optimizable.value(), expected)
    self.assertLess(optimizable.value(), 0.)

  def test_gradient(self):
    for use_hyperbolic_prior in [False, True]:
      with self.subTest(f'use_hyperbolic_prior={use_hyperbolic_prior}'):
        optimizable = optimizables.CRFOptimizableByLabelLikelihood(
            self.crf, self.instances,
            use_hyperbolic_prior=use_hyperbolic_prior)
        check_gradient(optimizable)

  def test_instance_weights(self):
    weighted = [
        optimizables.Instance(x.inputs, x.output, weight=2.)
        for x in self.instances
    ]
    optimizable = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, self.instances, gaussian_prior_variance=np.inf)
    doubled = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, weighted, gaussian_prior_variance=np.inf)
    self.assertAlmostEqual(doubled.value(), 2 * optimizable.value())
    npt.assert_allclose(doubled.value_gradient(),
                        2 * optimizable.value_gradient())
    check_gradient(doubled)

  def test_threads(self):
    single = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, self.instances)
    multi = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, self.instances, num_threads=2)
    self.assertAlmostEqual(single.value(), multi.value())
    npt.assert_allclose(single.value_gradient(), multi.value_gradient())

  def test_batches(self):
    optimizable = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, self.instances)
    assignments = optimizables.contiguous_batches(len(self.instances), 2)
    values = [optimizable.batch_value(b, assignments) for b in range(2)]
    gradients = [
        optimizable.batch_value_gradient(b, assignments) for b in range(2)
    ]
    self.assertAlmostEqual(sum(values), optimizable.value())
    npt.assert_allclose(sum(gradients), optimizable.value_gradient())
    with self.assertRaisesRegex(ValueError, 'out of range'):
      optimizable.batch_value(2, assignments)

  def test_caching(self):
    optimizable = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, self.instances)
    value = optimizable.value()
    gradient = optimizable.value_gradient()
    gradient += 1.
    npt.assert_allclose(optimizable.value_gradient(), gradient - 1.)
    optimizable.set_parameters(optimizable.parameters() + 0.1)
    self.assertNotEqual(optimizable.value(), value)

  def test_missing_output(self):
    with self.assertRaisesRegex(ValueError, 'has no output labels'):
      optimizables.CRFOptimizableByLabelLikelihood(
          self.crf, [optimizables.Instance(np.zeros([2, 2]))])

  def test_infinite_instances(self):
    weight_fn = weight_fns.CRFWeightFn(
        num_states=2,
        num_features=2,
        connection_mask=np.array([[True, False], [True, True]]),
        kernel_init=nn.initializers.normal(0.5))
    crf = crfs.CRF(weight_fn, ['A', 'B'], 2)
    inputs = np.ones([3, 2])
    possible = optimizables.Instance(inputs, [1, 1, 0], name='possible')
    impossible = optimizables.Instance(inputs, [0, 1, 0], name='impossible')

    with self.subTest('skipped'):
      optimizable = optimizables.CRFOptimizableByLabelLikelihood(
          crf, [possible, impossible])
      expected = optimizables.CRFOptimizableByLabelLikelihood(crf, [possible])
      self.assertAlmostEqual(optimizable.value(), expected.value())
      npt.assert_allclose(optimizable.value_gradient(),
                          expected.value_gradient())

    with self.subTest('becoming infinite'):
      optimizable = optimizables.CRFOptimizableByLabelLikelihood(
          crf, [possible, possible])
      optimizable.value()
      optimizable.instances[1] = impossible
      optimizable.set_parameters(optimizable.parameters() + 0.1)
      with self.assertRaisesRegex(optimizables.InvalidValueError,
                                  'used to have a finite value'):
        optimizable.value()


def make_ge_constraints():
  one_label = ge_constraints.OneLabelKLGEConstraints(2)
  one_label.add_constraint(0, [0.8, 0.2])
  one_label.add_constraint(2, [0.4, 0.6], weight=0.5)
  two_label = ge_constraints.TwoLabelL2GEConstraints(2)
  two_label.add_constraint(1, [[0.1, 0.4], [0.4, 0.1]])
  self_transition = ge_constraints.SelfTransitionGEConstraint(0.3)
  return [one_label, two_label, self_transition]


class CRFOptimizableByGETest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.data = make_data(4, seed=1)

  def test_value(self):
    constraints = make_ge_constraints()
    optimizable = optimizables.CRFOptimizableByGE(
        self.crf, constraints, self.data, gaussian_prior_variance=10.)
    self.assertTrue(optimizable.instances_with_constraints.all())
    value = optimizable.value()
    self.assertAlmostEqual(
        value,
        sum(c.value() for c in constraints) + self.crf.gaussian_prior(10.))

  def test_gradient(self):
    for num_threads in [1, 2]:
      with self.subTest(f'num_threads={num_threads}'):
        optimizable = optimizables.CRFOptimizableByGE(
            self.crf, make_ge_constraints(), self.data,
            num_threads=num_threads, weight=2.)
        check_gradient(optimizable)

  def test_threads(self):
    single = optimizables.CRFOptimizableByGE(self.crf, make_ge_constraints(),
                                             self.data)
    multi = optimizables.CRFOptimizableByGE(
        self.crf, make_ge_constraints(), self.data, num_threads=3)
    self.assertAlmostEqual(single.value(), multi.value())
    npt.assert_allclose(single.value_gradient(), multi.value_gradient())


class CRFOptimizableByEntropyRegularizationTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.data = make_data(4, seed=4)

  def test_value(self):
    optimizable = optimizables.CRFOptimizableByEntropyRegularization(
        self.crf, self.data, weight=0.5)
    expected = 0.
    for x in self.data:
      lattice = lattices.SumLattice(self.crf, x, save_xis=True)
      expected_weight = lattices.KLSumLattice(
          self.crf, x, np.exp(lattice.gammas), np.exp(lattice.xis))
      expected += expected_weight.total_weight - lattice.total_weight
    self.assertAlmostEqual(optimizable.value(), 0.5 * expected)
    self.assertLess(optimizable.value(), 0.)

  def test_gradient(self):
    for num_threads in [1, 2]:
      with self.subTest(f'num_threads={num_threads}'):
        optimizable = optimizables.CRFOptimizableByEntropyRegularization(
            self.crf, self.data, weight=2., num_threads=num_threads)
        check_gradient(optimizable)

  def test_uniform_model(self):
    self.crf.set_parameters(np.zeros(self.crf.num_parameters()))
    optimizable = optimizables.CRFOptimizableByEntropyRegularization(
        self.crf, self.data)
    # Two states over len(x) + 1 columns, all paths equally likely.
    expected = -sum(len(x) + 1 for x in self.data) * np.log(2.)
    self.assertAlmostEqual(optimizable.value(), expected)

  def test_impossible_instances(self):
    # Paths alternate between A and B and must end in B, so only sequences
    # of odd length have one.
    weight_fn = weight_fns.CRFWeightFn(
        num_states=2,
        num_features=2,
        connection_mask=np.array([[False, True], [True, False]]),
        start_mask=np.array([True, False]),
        final_mask=np.array([False, True]),
        kernel_init=nn.initializers.normal(0.5))
    crf = crfs.CRF(weight_fn, ['A', 'B'], 2)
    data = [np.ones([3, 2]), np.ones([2, 2])]
    optimizable = optimizables.CRFOptimizableByEntropyRegularization(
        crf, data)
    # The only path has all the probability.
    self.assertAlmostEqual(optimizable.value(), 0.)
    npt.assert_allclose(
        optimizable.value_gradient(), np.zeros(crf.num_parameters()),
        atol=1e-9)


class CRFOptimizableByGradientValuesTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.data = make_data(3, seed=5)
    self.likelihood = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf, make_instances(self.data))
    self.entropy = optimizables.CRFOptimizableByEntropyRegularization(
        self.crf, self.data, weight=0.3)

  def test_sum(self):
    optimizable = optimizables.CRFOptimizableByGradientValues(
        self.crf, [self.likelihood, self.entropy])
    self.assertAlmostEqual(optimizable.value(),
                           self.likelihood.value() + self.entropy.value())
    npt.assert_allclose(
        optimizable.value_gradient(),
        self.likelihood.value_gradient() + self.entropy.value_gradient())
    check_gradient(optimizable)

  def test_shares_parameters(self):
    optimizable = optimizables.CRFOptimizableByGradientValues(
        self.crf, [self.likelihood, self.entropy])
    parameters = np.linspace(-1., 1., optimizable.num_parameters())
    optimizable.set_parameters(parameters)
    npt.assert_array_equal(self.likelihood.parameters(), parameters)
    npt.assert_array_equal(self.entropy.parameters(), parameters)

  def test_bad_objectives(self):
    with self.assertRaisesRegex(ValueError, 'No objectives'):
      optimizables.CRFOptimizableByGradientValues(self.crf, [])
    other = crfs.CRF.fully_connected(3, ['A', 'B'])
    with self.assertRaisesRegex(ValueError, 'Objective 1 has'):
      optimizables.CRFOptimizableByGradientValues(
          self.crf, [self.likelihood,
                     optimizables.CRFOptimizableByEntropyRegularization(
                         other, [np.ones([2, 3])])])


def make_aux_model(crf, data):
  constraints = pr_constraints.OneLabelL2PRConstraints(2)
  constraints.add_constraint(0, [0.8, 0.2], weight=2.)
  constraints.add_constraint(2, [0.3, 0.7], weight=1.)
  aux_model = pr_constraints.PRAuxiliaryModel(crf.state_label_map(),
                                              [constraints])
  pr_constraints.constrained_instances(aux_model.constraints, data)
  return aux_model


class ConstraintsOptimizableByPRTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.data = make_data(3, seed=2)
    self.aux_model = make_aux_model(self.crf, self.data)
    self.aux_model.set_parameters(np.array([0.5, -0.2, 0.1, 0.3]))

  def test_value(self):
    optimizable = optimizables.ConstraintsOptimizableByPR(
        self.crf, self.data, self.aux_model)
    expected = self.aux_model.value() - sum(
        lattices.PRSumLattice(self.crf, self.aux_model, x).total_weight
        for x in self.data)
    self.assertAlmostEqual(optimizable.value(), expected)
    self.assertEqual(optimizable.num_parameters(), 4)
    self.assertGreaterEqual(optimizable.complete_value(), 0.)

  def test_gradient(self):
    for num_threads in [1, 2]:
      with self.subTest(f'num_threads={num_threads}'):
        optimizable = optimizables.ConstraintsOptimizableByPR(
            self.crf, self.data, self.aux_model, num_threads=num_threads)
        check_gradient(optimizable)


class CRFOptimizableByKLTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    self.crf = make_crf()
    self.data = make_data(3, seed=3)
    self.aux_model = make_aux_model(self.crf, self.data)
    self.aux_model.set_parameters(np.array([1., -1., 0.5, 0.2]))

  def test_value(self):
    optimizable = optimizables.CRFOptimizableByKL(
        self.crf, self.data, self.aux_model, gaussian_prior_variance=np.inf)
    # Expected log probabilities of paths are negative.
    self.assertLess(optimizable.value(), 0.)

    # With q = p the value is minus the entropy of p.
    self.aux_model.set_parameters(np.zeros(4))
    same = optimizables.CRFOptimizableByKL(
        self.crf, self.data, self.aux_model, gaussian_prior_variance=np.inf)
    entropy = 0.
    for x in self.data:
      lattice = lattices.SumLattice(self.crf, x, save_xis=True)
      kl = lattices.KLSumLattice(self.crf, x, np.exp(lattice.gammas),
                                 np.exp(lattice.xis))
      entropy -= kl.total_weight - lattice.total_weight
    self.assertAlmostEqual(same.value(), -entropy)

  def test_gradient(self):
    for num_threads in [1, 2]:
      with self.subTest(f'num_threads={num_threads}'):
        optimizable = optimizables.CRFOptimizableByKL(
            self.crf, self.data, self.aux_model, num_threads=num_threads,
            weight=0.5)
        check_gradient(optimizable)

  def test_cached_dots(self):
    cached_dots = [np.asarray(self.crf.weights(x).transitions)
                   for x in self.data]
    optimizable = optimizables.CRFOptimizableByKL(
        self.crf, self.data, self.aux_model)
    cached = optimizables.CRFOptimizableByKL(
        self.crf, self.data, self.aux_model, cached_dots)
    npt.assert_allclose(cached.constraints, optimizable.constraints)
    self.assertAlmostEqual(cached.value(), optimizable.value())

  def test_zero_gradient_at_q(self):
    # With zero auxiliary parameters q = p, so without a prior p is optimal.
    self.aux_model.set_parameters(np.zeros(4))
    optimizable = optimizables.CRFOptimizableByKL(
        self.crf, self.data, self.aux_model, gaussian_prior_variance=np.inf)
    npt.assert_allclose(
        optimizable.value_gradient(), np.zeros(optimizable.num_parameters()),
        atol=1e-9)

  def test_bad_weight(self):
    with self.assertRaisesRegex(ValueError, 'weight should be positive'):
      optimizables.CRFOptimizableByKL(
          self.crf, self.data, self.aux_model, weight=0.)


if __name__ == '__main__':
  absltest.main()
