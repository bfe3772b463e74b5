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

"""Training drivers for CRFs."""

from collections.abc import Callable, Sequence
import dataclasses
import math
from typing import Optional

from absl import logging
import numpy as np

from lincrf import crfs
from lincrf import ge_constraints
from lincrf import optimizables
from lincrf import optimizers
from lincrf import orthant_wise
from lincrf import pr_constraints
from lincrf import stochastic
from lincrf import transducers


class _CRFTrainer:
  """Runs an optimizer one iteration at a time.

  A failed line search resets the optimizer. The first failure is retried
  with a fresh optimizer, the second one ends training.
  """

  def __init__(self, crf: crfs.CRF):
    self.crf = crf
    self.iteration = 0
    self.converged = False
    self.optimizer = None

  @property
  def is_finished_training(self) -> bool:
    return self.converged

  def _run(self, make_optimizer: Callable[[], optimizers.Optimizer],
           num_iterations: int) -> bool:
    self.optimizer = make_optimizer()
    self.converged = False
    retried = False
    logging.info('CRF about to train with %d iterations', num_iterations)
    for i in range(num_iterations):
      self.converged = self.optimizer.optimize(1)
      self.iteration += 1
      logging.info('CRF finished one iteration of maximizer, i=%d', i)
      if self.optimizer.status == optimizers.Status.FAILED:
        if retried:
          logging.info('Optimizer failed again; saying converged.')
          self.converged = True
        else:
          logging.info('Optimizer failed; retrying with a fresh optimizer.')
          retried = True
          self.optimizer = make_optimizer()
      if self.converged:
        logging.info('CRF training has converged, i=%d', i)
        break
    return self.converged

  def _run_with_resets(self, optimizer: optimizers.LimitedMemoryBFGS,
                       num_iterations: int, num_resets: int) -> bool:
    """Runs L-BFGS, resetting its history `num_resets` times.

    The iterations are shared by all rounds. A round ends when L-BFGS
    converges, fails or raises an OptimizationError.

    Args:
      optimizer: L-BFGS over the objective.
      num_iterations: Maximum number of iterations over all rounds.
      num_resets: Number of history resets.

    Returns:
      Whether the last round converged.
    """
    self.optimizer = optimizer
    self.converged = False
    logging.info('CRF about to train with %d iterations', num_iterations)
    i = 0
    for _ in range(num_resets + 1):
      while i < num_iterations:
        try:
          self.converged = optimizer.optimize(1)
          self.iteration += 1
          logging.info('CRF finished one iteration of maximizer, i=%d', i)
          if optimizer.status == optimizers.Status.FAILED:
            logging.info('L-BFGS could not step; saying converged.')
            self.converged = True
        except optimizers.OptimizationError:
          logging.exception('Catching exception; saying converged.')
          self.converged = True
        i += 1
        if self.converged:
          logging.info('CRF training has converged, i=%d', i)
          break
      optimizer.reset()
    return self.converged


class CRFTrainerByLabelLikelihood(_CRFTrainer):
  """Maximum a posteriori training on labeled sequences with L-BFGS."""

  def __init__(
      self,
      crf: crfs.CRF,
      *,
      gaussian_prior_variance: float = (
          optimizables.DEFAULT_GAUSSIAN_PRIOR_VARIANCE),
      use_hyperbolic_prior: bool = False,
      hyperbolic_prior_slope: float = (
          optimizables.DEFAULT_HYPERBOLIC_PRIOR_SLOPE),
      hyperbolic_prior_sharpness: float = (
          optimizables.DEFAULT_HYPERBOLIC_PRIOR_SHARPNESS),
      num_threads: int = 1,
      lbfgs_config: optimizers.LBFGSConfig = optimizers.LBFGSConfig()):
    super().__init__(crf)
    self.gaussian_prior_variance = gaussian_prior_variance
    self.use_hyperbolic_prior = use_hyperbolic_prior
    self.hyperbolic_prior_slope = hyperbolic_prior_slope
    self.hyperbolic_prior_sharpness = hyperbolic_prior_sharpness
    self.num_threads = num_threads
    self.lbfgs_config = lbfgs_config
    self._optimizable = None
    self._instances = None

  def optimizable(
      self, instances: Sequence[optimizables.Instance]
  ) -> optimizables.CRFOptimizableByLabelLikelihood:
    """The objective over `instances`, reused while they don't change."""
    if self._optimizable is None or instances is not self._instances:
      self._instances = instances
      self._optimizable = optimizables.CRFOptimizableByLabelLikelihood(
          self.crf,
          instances,
          gaussian_prior_variance=self.gaussian_prior_variance,
          use_hyperbolic_prior=self.use_hyperbolic_prior,
          hyperbolic_prior_slope=self.hyperbolic_prior_slope,
          hyperbolic_prior_sharpness=self.hyperbolic_prior_sharpness,
          num_threads=self.num_threads)
    return self._optimizable

  def _make_optimizer(self, optimizable) -> optimizers.Optimizer:
    return optimizers.LimitedMemoryBFGS(optimizable, self.lbfgs_config)

  def train(self, instances: Sequence[optimizables.Instance],
            num_iterations: int = 1000) -> bool:
    """Trains on labeled instances.

    Args:
      instances: Training instances, with outputs.
      num_iterations: Maximum number of optimizer iterations.

    Returns:
      Whether training converged.
    """
    optimizable = self.optimizable(instances)
    return self._run(lambda: self._make_optimizer(optimizable),
                     num_iterations)


class CRFTrainerByL1LabelLikelihood(CRFTrainerByLabelLikelihood):
  """Label likelihood training with an L1 penalty, using OWL-QN.

  The Gaussian prior is off by default, leaving the L1 penalty as the only
  regularizer.
  """

  def __init__(self,
               crf: crfs.CRF,
               l1_weight: float,
               *,
               gaussian_prior_variance: float = math.inf,
               num_threads: int = 1,
               owlqn_config: Optional[orthant_wise.OWLQNConfig] = None):
    super().__init__(
        crf,
        gaussian_prior_variance=gaussian_prior_variance,
        num_threads=num_threads)
    if l1_weight < 0:
      raise ValueError(f'l1_weight should be non-negative, got {l1_weight}')
    if owlqn_config is None:
      owlqn_config = orthant_wise.OWLQNConfig()
    self.owlqn_config = dataclasses.replace(owlqn_config, l1_weight=l1_weight)

  def _make_optimizer(self, optimizable) -> optimizers.Optimizer:
    return orthant_wise.OrthantWiseLBFGS(optimizable, self.owlqn_config)


class CRFTrainerByGE(_CRFTrainer):
  """Generalized expectation training on unlabeled sequences.

  The GE objective isn't concave, so L-BFGS is reset `num_resets` times and
  optimization continues from where it stopped.
  """

  DEFAULT_NUM_RESETS = 1
  DEFAULT_GAUSSIAN_PRIOR_VARIANCE = 10.0

  def __init__(
      self,
      crf: crfs.CRF,
      constraints: Sequence[ge_constraints.GEConstraints],
      *,
      state_label_map: Optional[transducers.StateLabelMap] = None,
      num_threads: int = 1,
      num_resets: int = DEFAULT_NUM_RESETS,
      gaussian_prior_variance: float = DEFAULT_GAUSSIAN_PRIOR_VARIANCE,
      lbfgs_config: optimizers.LBFGSConfig = optimizers.LBFGSConfig()):
    super().__init__(crf)
    if not constraints:
      raise ValueError('No constraints specified')
    self.constraints = list(constraints)
    if state_label_map is None:
      state_label_map = crf.state_label_map()
    self.state_label_map = state_label_map
    self.num_threads = num_threads
    self.num_resets = num_resets
    self.gaussian_prior_variance = gaussian_prior_variance
    self.lbfgs_config = lbfgs_config

  def train(self, data: Sequence[np.ndarray],
            num_iterations: int = 1000) -> bool:
    """Trains on unlabeled input sequences.

    Args:
      data: [num_positions, num_features] input sequences.
      num_iterations: Maximum number of optimizer iterations.

    Returns:
      Whether training converged.
    """
    ge = optimizables.CRFOptimizableByGE(
        self.crf,
        self.constraints,
        data,
        self.state_label_map,
        num_threads=self.num_threads,
        gaussian_prior_variance=self.gaussian_prior_variance)
    return self._run_with_resets(
        optimizers.LimitedMemoryBFGS(ge, self.lbfgs_config), num_iterations,
        self.num_resets)


class CRFTrainerByLikelihoodAndGE(_CRFTrainer):
  """Label likelihood on labeled data plus GE criteria on unlabeled data.

  The Gaussian prior belongs to the likelihood term only. Optionally, the
  model is first trained on the labeled data alone.
  """

  DEFAULT_GAUSSIAN_PRIOR_VARIANCE = 10.0

  def __init__(
      self,
      crf: crfs.CRF,
      constraints: Sequence[ge_constraints.GEConstraints],
      *,
      state_label_map: Optional[transducers.StateLabelMap] = None,
      ge_weight: float = 1.0,
      gaussian_prior_variance: float = DEFAULT_GAUSSIAN_PRIOR_VARIANCE,
      init_supervised: bool = False,
      supervised_iterations: int = 1000,
      num_threads: int = 1,
      lbfgs_config: optimizers.LBFGSConfig = optimizers.LBFGSConfig()):
    super().__init__(crf)
    if not constraints:
      raise ValueError('No constraints specified')
    self.constraints = list(constraints)
    if state_label_map is None:
      state_label_map = crf.state_label_map()
    self.state_label_map = state_label_map
    self.ge_weight = ge_weight
    self.gaussian_prior_variance = gaussian_prior_variance
    self.init_supervised = init_supervised
    self.supervised_iterations = supervised_iterations
    self.num_threads = num_threads
    self.lbfgs_config = lbfgs_config

  def objective(
      self, labeled: Sequence[optimizables.Instance],
      unlabeled: Sequence[np.ndarray]
  ) -> optimizables.CRFOptimizableByGradientValues:
    likelihood = optimizables.CRFOptimizableByLabelLikelihood(
        self.crf,
        labeled,
        gaussian_prior_variance=self.gaussian_prior_variance,
        num_threads=self.num_threads)
    ge = optimizables.CRFOptimizableByGE(
        self.crf,
        self.constraints,
        unlabeled,
        self.state_label_map,
        num_threads=self.num_threads,
        weight=self.ge_weight,
        gaussian_prior_variance=math.inf)
    return optimizables.CRFOptimizableByGradientValues(self.crf,
                                                       [likelihood, ge])

  def train(self,
            labeled: Sequence[optimizables.Instance],
            unlabeled: Sequence[np.ndarray],
            num_iterations: int = 1000) -> bool:
    """Trains on labeled instances and unlabeled input sequences.

    L-BFGS runs twice on the combined objective, with a reset in between.

    Args:
      labeled: Training instances, with outputs.
      unlabeled: [num_positions, num_features] input sequences.
      num_iterations: Maximum number of L-BFGS iterations of each run.

    Returns:
      Whether the second run converged.
    """
    logging.info('Training on %d labeled and %d unlabeled sequences.',
                 len(labeled), len(unlabeled))
    if self.init_supervised:
      supervised = CRFTrainerByLabelLikelihood(
          self.crf,
          gaussian_prior_variance=self.gaussian_prior_variance,
          num_threads=self.num_threads,
          lbfgs_config=self.lbfgs_config)
      supervised.train(labeled, self.supervised_iterations)
      self.iteration += supervised.iteration

    optimizer = optimizers.LimitedMemoryBFGS(
        self.objective(labeled, unlabeled), self.lbfgs_config)
    self.optimizer = optimizer
    for _ in range(2):
      try:
        self.converged = optimizer.optimize(num_iterations)
      except optimizers.OptimizationError:
        logging.exception('L-BFGS failed on likelihood and GE.')
        self.converged = False
      self.iteration += optimizer.iterations
      optimizer.reset()
    return self.converged


class CRFTrainerByEntropyRegularization(_CRFTrainer):
  """Semi-supervised training with entropy regularization.

  The first call to train() fits the model to the labeled data alone. The
  model then maximizes the label likelihood plus the weighted negative entropy
  of its predictions on the unlabeled data. That objective isn't concave, so
  L-BFGS is reset `num_resets` times.
  """

  DEFAULT_NUM_RESETS = 1

  def __init__(
      self,
      crf: crfs.CRF,
      *,
      entropy_weight: float = 1.0,
      gaussian_prior_variance: float = (
          optimizables.DEFAULT_GAUSSIAN_PRIOR_VARIANCE),
      num_resets: int = DEFAULT_NUM_RESETS,
      num_threads: int = 1,
      lbfgs_config: optimizers.LBFGSConfig = optimizers.LBFGSConfig()):
    super().__init__(crf)
    self.entropy_weight = entropy_weight
    self.gaussian_prior_variance = gaussian_prior_variance
    self.num_resets = num_resets
    self.num_threads = num_threads
    self.lbfgs_config = lbfgs_config

  def _likelihood(
      self, labeled: Sequence[optimizables.Instance]
  ) -> optimizables.CRFOptimizableByLabelLikelihood:
    return optimizables.CRFOptimizableByLabelLikelihood(
        self.crf,
        labeled,
        gaussian_prior_variance=self.gaussian_prior_variance,
        num_threads=self.num_threads)

  def objective(
      self, labeled: Sequence[optimizables.Instance],
      unlabeled: Sequence[np.ndarray]
  ) -> optimizables.CRFOptimizableByGradientValues:
    regularization = optimizables.CRFOptimizableByEntropyRegularization(
        self.crf,
        unlabeled,
        weight=self.entropy_weight,
        num_threads=self.num_threads)
    return optimizables.CRFOptimizableByGradientValues(
        self.crf, [self._likelihood(labeled), regularization])

  def train(self,
            labeled: Sequence[optimizables.Instance],
            unlabeled: Sequence[np.ndarray],
            num_iterations: int = 1000) -> bool:
    """Trains on labeled instances and unlabeled input sequences.

    Args:
      labeled: Training instances, with outputs.
      unlabeled: [num_positions, num_features] input sequences.
      num_iterations: Maximum number of L-BFGS iterations of each stage.

    Returns:
      Whether the regularized stage converged.
    """
    if self.iteration == 0:
      likelihood = self._likelihood(labeled)
      self._run(
          lambda: optimizers.LimitedMemoryBFGS(likelihood, self.lbfgs_config),
          num_iterations)
    return self._run_with_resets(
        optimizers.LimitedMemoryBFGS(
            self.objective(labeled, unlabeled), self.lbfgs_config),
        num_iterations, self.num_resets)


class CRFTrainerByStochasticGradient(_CRFTrainer):
  """Label likelihood training with stochastic meta-ascent.

  The instances are split into `num_batches` contiguous batches and the
  parameters are updated after each batch. The optimizer, gains included, is
  kept across calls to train() on the same instances.
  """

  DEFAULT_NUM_BATCHES = 10

  def __init__(
      self,
      crf: crfs.CRF,
      *,
      num_batches: int = DEFAULT_NUM_BATCHES,
      gaussian_prior_variance: float = (
          optimizables.DEFAULT_GAUSSIAN_PRIOR_VARIANCE),
      num_threads: int = 1,
      sma_config: stochastic.SMAConfig = stochastic.SMAConfig()):
    super().__init__(crf)
    if num_batches < 1:
      raise ValueError(f'num_batches should be positive, got {num_batches}')
    self.num_batches = num_batches
    self.gaussian_prior_variance = gaussian_prior_variance
    self.num_threads = num_threads
    self.sma_config = sma_config
    self._instances = None

  def train(self,
            instances: Sequence[optimizables.Instance],
            num_iterations: Optional[int] = None) -> bool:
    """Runs passes over the batches of labeled instances.

    Args:
      instances: Training instances, with outputs.
      num_iterations: Number of passes. Defaults to the SMA iteration limit.

    Returns:
      Whether the value summed over a pass converged.
    """
    if self.optimizer is None or instances is not self._instances:
      self._instances = instances
      likelihood = optimizables.CRFOptimizableByLabelLikelihood(
          self.crf,
          instances,
          gaussian_prior_variance=self.gaussian_prior_variance,
          num_threads=self.num_threads)
      self.optimizer = stochastic.StochasticMetaAscent(likelihood,
                                                       self.sma_config)
    assignments = optimizables.contiguous_batches(
        len(instances), self.num_batches)
    logging.info('CRF about to train with %d batches', len(assignments))
    self.converged = self.optimizer.optimize(num_iterations, assignments)
    self.iteration = self.optimizer.iterations
    return self.converged


@dataclasses.dataclass(frozen=True)
class PRTrainerConfig:
  """Configuration of CRFTrainerByPR.

  Attributes:
    p_gaussian_prior_variance: Gaussian prior variance of the model in the
      M-step.
    tolerance: Relative change of the total value for convergence.
    eps: Added to the value magnitudes in the convergence test.
  """
  p_gaussian_prior_variance: float = 10.0
  tolerance: float = 1e-3
  eps: float = 1e-5


class CRFTrainerByPR:
  """Posterior regularization by alternating projections.

  Each outer iteration runs
  -   an E-step, fitting the auxiliary distribution q to the constraints with
      the model p fixed, and
  -   an M-step, fitting p to q by minimizing KL(q || p).

  Attributes:
    value: Total value p_value - q_value of the last iteration.
    q_value: Constraint penalty of the last E-step.
  """

  def __init__(self,
               crf: crfs.CRF,
               constraints: Sequence[pr_constraints.PRConstraint],
               *,
               state_label_map: Optional[transducers.StateLabelMap] = None,
               num_threads: int = 1,
               config: PRTrainerConfig = PRTrainerConfig(),
               lbfgs_config: optimizers.LBFGSConfig = optimizers.LBFGSConfig()):
    self.crf = crf
    self.constraints = list(constraints)
    if state_label_map is None:
      state_label_map = crf.state_label_map()
    self.state_label_map = state_label_map
    self.num_threads = num_threads
    self.config = config
    self.lbfgs_config = lbfgs_config
    self.iteration = 0
    self.converged = False
    self.value = -math.inf
    self.q_value = math.nan

  @property
  def is_finished_training(self) -> bool:
    return self.converged

  def _optimize(self, optimizable: optimizables.GradientValueOptimizable,
                max_iterations_per_step: Optional[int], step: str) -> None:
    optimizer = optimizers.LimitedMemoryBFGS(optimizable, self.lbfgs_config)
    try:
      optimizer.optimize(max_iterations_per_step)
    except optimizers.OptimizationError:
      logging.exception('%s optimization failed; continuing.', step)

  def train(self,
            data: Sequence[np.ndarray],
            min_iterations: int = 0,
            max_iterations: int = 100,
            max_iterations_per_step: Optional[int] = None) -> bool:
    """Trains on unlabeled input sequences.

    Args:
      data: [num_positions, num_features] input sequences.
      min_iterations: Outer iterations to run before testing convergence.
      max_iterations: Maximum number of outer iterations.
      max_iterations_per_step: Maximum number of L-BFGS iterations of each E
        and M step. Unlimited if None.

    Returns:
      True once training has finished.
    """
    config = self.config
    for constraint in self.constraints:
      constraint.set_state_label_map(self.state_label_map)
    mask = pr_constraints.constrained_instances(self.constraints, data)
    data = [x for x, keep in zip(data, mask) if keep]
    logging.info('Removed %d instances that do not contain constraints.',
                 len(mask) - len(data))
    aux_model = pr_constraints.PRAuxiliaryModel(self.state_label_map,
                                                self.constraints)

    old_value = 0.0
    last = self.iteration + max_iterations
    while self.iteration < last:
      q = optimizables.ConstraintsOptimizableByPR(
          self.crf, data, aux_model, num_threads=self.num_threads)
      self._optimize(q, max_iterations_per_step, 'E-step')
      self.q_value = q.complete_value()

      p = optimizables.CRFOptimizableByKL(
          self.crf,
          data,
          aux_model,
          q.cached_dots,
          num_threads=self.num_threads,
          gaussian_prior_variance=config.p_gaussian_prior_variance)
      self._optimize(p, max_iterations_per_step, 'M-step')
      p_value = p.value()
      self.value = p_value - self.q_value
      logging.info('Total value = %s (p value = %s) (q value = %s)',
                   self.value, p_value, -self.q_value)

      if self.iteration >= min_iterations and optimizers.values_converged(
          self.value, old_value, config.tolerance, config.eps):
        logging.info(
            'PR value difference below tolerance (old value: %s, new value: '
            '%s)', old_value, self.value)
        break
      old_value = self.value
      self.iteration += 1
    self.converged = True
    return self.converged
