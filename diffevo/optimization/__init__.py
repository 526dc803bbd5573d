# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from .differentialevolution import differential_evolution as differential_evolution
from .differentialevolution import DifferentialEvolutionParameters as DifferentialEvolutionParameters
from .differentialevolution import (
    validate_differential_evolution_parameters as validate_differential_evolution_parameters,
)
from .utils import CancellationToken as CancellationToken
from .utils import CurrentMinimum as CurrentMinimum
from .utils import QueryLog as QueryLog
