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

"""Linear-chain CRF lattices, expectation constraints and optimizers."""

import jax

# The optimizers' tolerances and curvature checks need double precision.
jax.config.update('jax_enable_x64', True)

# pylint: disable=g-import-not-at-top,g-bad-import-order
from lincrf import crfs
from lincrf import ge_constraints
from lincrf import lattices
from lincrf import optimizables
from lincrf import optimizers
from lincrf import orthant_wise
from lincrf import pr_constraints
from lincrf import semirings
from lincrf import stochastic
from lincrf import trainers
from lincrf import transducers
from lincrf import weight_fns
