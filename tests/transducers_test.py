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
"""Tests for transducers."""

from absl.testing import absltest
import jax.numpy as jnp
from lincrf import crfs
from lincrf import transducers
from lincrf import weight_fns
import numpy as np
import numpy.testing as npt

INF = np.inf


class StateLabelMapTest(absltest.TestCase):

  def test_one_to_one(self):
    label_map = transducers.StateLabelMap.one_to_one(3)
    self.assertEqual(label_map.num_labels, 3)
    self.assertEqual(label_map.num_states, 3)
    npt.assert_array_equal(label_map.indicator(), np.eye(3))
    self.assertEqual(label_map.label_index(2), 2)
    self.assertEqual(label_map.state_indices(1), [1])

  def test_shared_labels(self):
    label_map = transducers.StateLabelMap(
        [transducers.START_LABEL, 0, 1, 1], num_labels=2)
    npt.assert_array_equal(label_map.indicator(),
                           [[0, 0], [1, 0], [0, 1], [0, 1]])
    self.assertEqual(label_map.label_index(0), transducers.START_LABEL)
    self.assertEqual(label_map.state_indices(1), [2, 3])
    self.assertEqual(label_map.state_indices(transducers.START_LABEL), [0])
    npt.assert_array_equal(label_map.state_labels, [-2, 0, 1, 1])

  def test_invalid_labels(self):
    for state_labels in [[0, 2], [-1, 0], [0, 5]]:
      with self.subTest(str(state_labels)):
        with self.assertRaisesRegex(ValueError, 'State labels must be'):
          transducers.StateLabelMap(state_labels, num_labels=2)


class TransducerTest(absltest.TestCase):

  def setUp(self):
    super().setUp()
    table = np.array([[[0.5, -INF], [1., 2.]],
                      [[-INF, -INF], [3., -INF]]])
    self.crf = crfs.CRF(
        weight_fns.TableWeightFn(
            table=table, initial=np.zeros(2), final=np.zeros(2)),
        state_names=['a', 'b'],
        num_features=1)

  def test_transitions(self):
    inputs = jnp.array([[0.], [1.]])
    with self.subTest('position 0'):
      self.assertEqual(
          list(self.crf.transitions(0, inputs, 0)),
          [transducers.Transition(destination=0, output=0, weight=0.5)])
      self.assertEqual(
          list(self.crf.transitions(1, inputs, 0)), [
              transducers.Transition(destination=0, output=0, weight=1.),
              transducers.Transition(destination=1, output=1, weight=2.)
          ])
    with self.subTest('position 1'):
      self.assertEqual(list(self.crf.transitions(0, inputs, 1)), [])
      self.assertEqual(
          list(self.crf.transitions(1, inputs, 1)),
          [transducers.Transition(destination=0, output=0, weight=3.)])
    with self.subTest('precomputed weights'):
      weights = self.crf.weights(inputs)
      self.assertLen(list(self.crf.transitions(1, inputs, 0, weights)), 2)
    with self.subTest('out of range'):
      with self.assertRaisesRegex(ValueError, 'out of range'):
        list(self.crf.transitions(0, inputs, 2))

  def test_state_index(self):
    self.assertEqual(self.crf.num_states(), 2)
    self.assertEqual(self.crf.state_index('b'), 1)
    with self.assertRaisesRegex(ValueError, 'Unknown state'):
      self.crf.state_index('c')


if __name__ == '__main__':
  absltest.main()
