# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

from .common import typing as typing
from .common import errors as errors
from .optimization import differential_evolution as differential_evolution
from .optimization import DifferentialEvolutionParameters as DifferentialEvolutionParameters
from .optimization import validate_differential_evolution_parameters as validate_differential_evolution_parameters
from .optimization import CancellationToken as CancellationToken
from .optimization import CurrentMinimum as CurrentMinimum
from .optimization import QueryLog as QueryLog
from .optimization import callbacks as callbacks


__all__ = [
    "differential_evolution",
    "DifferentialEvolutionParameters",
    "validate_differential_evolution_parameters",
    "CancellationToken",
    "CurrentMinimum",
    "QueryLog",
    "callbacks",
    "errors",
    "typing",
]


__version__ = "0.1.0"
