# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# base classes


class DiffEvoError(Exception):
    """Base class for error raised by diffevo"""


class DiffEvoWarning(Warning):
    pass


# errors
# pylint: disable=too-many-ancestors


class InvalidArgumentError(ValueError, DiffEvoError):
    """Structural misconfiguration of a run (bounds, population size, generations, threads, initial guess)"""


class DomainError(ValueError, DiffEvoError):
    """Parameter value outside of its admissible domain (eg: mutation factor not in (0, 1))"""


class DiffEvoRuntimeError(RuntimeError, DiffEvoError):
    """Runtime error raised by diffevo"""


# warnings


class DiffEvoRuntimeWarning(RuntimeWarning, DiffEvoWarning):
    """Runtime warning raise by diffevo"""


class InefficientSettingsWarning(DiffEvoRuntimeWarning):
    """Optimization settings are not optimal for the optimizer"""


class BadCostWarning(DiffEvoRuntimeWarning):
    """Costs provided by the cost function are unhelpful"""
