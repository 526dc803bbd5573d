# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import inspect
import typing as tp
import numpy as np


def _differs(value: tp.Any, default: tp.Any) -> bool:
    if isinstance(value, np.ndarray) or isinstance(default, np.ndarray):
        return value is not default and not (
            isinstance(value, np.ndarray)
            and isinstance(default, np.ndarray)
            and np.array_equal(value, default, equal_nan=True)
        )
    if isinstance(value, float) and isinstance(default, float) and np.isnan(value) and np.isnan(default):
        return False
    return bool(value != default)


def different_from_defaults(*, instance: tp.Any) -> tp.Dict[str, tp.Any]:
    """Checks which attributes are different from defaults arguments

    Parameters
    ----------
    instance: object
        the object to check, its attributes must be named as the arguments of its __init__

    Note
    ----
    This is convenient for short repr of data structures.
    Arguments without default (eg: keyword-only bounds) are always considered different.
    """
    defaults = {
        x: y.default
        for x, y in inspect.signature(instance.__class__.__init__).parameters.items()
        if x not in ["self", "__class__"]
    }
    instance_dict = instance.__dict__
    defaults = {x: y for x, y in defaults.items() if x in instance_dict}
    # only print non defaults
    return {
        x: instance_dict[x]
        for x, y in defaults.items()
        if (y is inspect.Parameter.empty or _differs(instance_dict[x], y)) and not x.startswith("_")
    }
