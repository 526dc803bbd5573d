# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import threading
import numpy as np
import diffevo.common.typing as tp
from diffevo.common import errors


def _as_vector(values: tp.ArrayLike, name: str) -> np.ndarray:
    try:
        array = np.array(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise errors.InvalidArgumentError(f"{name} must be a sequence of real numbers, got {values!r}") from e
    if array.ndim != 1:
        raise errors.InvalidArgumentError(f"{name} must be one-dimensional, got shape {array.shape}")
    return array


def validate_bounds(lower_bounds: tp.ArrayLike, upper_bounds: tp.ArrayLike) -> None:
    """Checks that the bounds define a non-empty finite box

    Raises
    ------
    InvalidArgumentError
        if the bounds have different or zero length, are not finite, or if lower > upper on some dimension
    """
    lower = _as_vector(lower_bounds, "lower_bounds")
    upper = _as_vector(upper_bounds, "upper_bounds")
    if lower.size != upper.size:
        raise errors.InvalidArgumentError(
            f"Lower bounds have dimension {lower.size}, but upper bounds have dimension {upper.size}."
        )
    if not lower.size:
        raise errors.InvalidArgumentError("The dimension of the problem cannot be zero.")
    for name, bound in [("lower", lower), ("upper", upper)]:
        invalid = np.nonzero(~np.isfinite(bound))[0]
        if invalid.size:
            raise errors.InvalidArgumentError(
                f"All {name} bounds must be finite, but {name}_bounds[{invalid[0]}] = {bound[invalid[0]]}."
            )
    crossed = np.nonzero(lower > upper)[0]
    if crossed.size:
        j = crossed[0]
        raise errors.InvalidArgumentError(
            f"The lower bound must be <= the upper bound, but lower_bounds[{j}] = {lower[j]} > upper_bounds[{j}] = {upper[j]}."
        )


def validate_initial_guess(
    initial_guess: tp.ArrayLike, lower_bounds: tp.ArrayLike, upper_bounds: tp.ArrayLike
) -> None:
    """Checks that the initial guess has the dimension of the bounds and lies within them

    Raises
    ------
    InvalidArgumentError
        if the dimension mismatches or if a coordinate is not finite or outside the bounds
    """
    guess = _as_vector(initial_guess, "initial_guess")
    lower = _as_vector(lower_bounds, "lower_bounds")
    upper = _as_vector(upper_bounds, "upper_bounds")
    if guess.size != lower.size:
        raise errors.InvalidArgumentError(
            f"The initial guess has dimension {guess.size}, but the bounds have dimension {lower.size}."
        )
    for j, (x, lb, ub) in enumerate(zip(guess, lower, upper)):
        if not np.isfinite(x):
            raise errors.InvalidArgumentError(f"The initial guess must be finite, but initial_guess[{j}] = {x}.")
        if x < lb or x > ub:
            raise errors.InvalidArgumentError(
                f"The initial guess must be within bounds, but initial_guess[{j}] = {x} is not in [{lb}, {ub}]."
            )


def random_initial_population(
    lower_bounds: np.ndarray, upper_bounds: np.ndarray, population_size: int, random_state: np.random.RandomState
) -> np.ndarray:
    """Samples a population uniformly in the box, with shape (population_size, dimension).
    Draws are sequential from the provided random state, row after row.
    """
    lower = np.asarray(lower_bounds, dtype=float)
    upper = np.asarray(upper_bounds, dtype=float)
    return random_state.uniform(lower, upper, size=(population_size, lower.size))


class CancellationToken:
    """Thread-safe flag for requesting the interruption of a run.
    The run polls it at each generation boundary and before each evaluation,
    in-flight cost function calls are not interrupted.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def __bool__(self) -> bool:
        return self._event.is_set()

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(cancelled={self.is_cancelled})"


class CurrentMinimum:
    """Shared cell holding the smallest cost seen so far, which can be polled
    from another thread while a run is ongoing.

    Parameters
    ----------
    value: float
        initial value of the cell. A NaN value means "unknown" and is replaced by the first non-NaN cost.

    Note
    ----
    Updates are monotonic: the held value never increases. Readers may observe a
    slightly stale value while workers are updating it.
    """

    def __init__(self, value: float = float("inf")) -> None:
        self._value = float(value)
        self._lock = threading.Lock()

    @property
    def value(self) -> float:
        return self._value

    def update(self, cost: float) -> bool:
        """Stores the cost if it is strictly smaller than the current value
        Returns True if the value was updated.
        """
        if np.isnan(cost):
            return False
        with self._lock:
            if cost < self._value or np.isnan(self._value):
                self._value = float(cost)
                return True
        return False

    def __float__(self) -> float:
        return self._value

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._value})"


class QueryLog:
    """Append-only record of all (point, cost) pairs evaluated during a run.
    Appending is thread-safe, order of records follows completion order of evaluations.
    """

    def __init__(self) -> None:
        self._records: tp.List[tp.Tuple[np.ndarray, float]] = []
        self._lock = threading.Lock()

    def append(self, point: np.ndarray, cost: float) -> None:
        record = (np.array(point, dtype=float, copy=True), float(cost))
        with self._lock:
            self._records.append(record)

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> tp.Iterator[tp.Tuple[np.ndarray, float]]:
        with self._lock:
            records = list(self._records)
        return iter(records)

    def as_arrays(self) -> tp.Tuple[np.ndarray, np.ndarray]:
        """Returns the points as a (num_queries, dimension) array and the costs as a (num_queries,) array"""
        records = list(self)
        if not records:
            return np.zeros((0, 0)), np.zeros((0,))
        points = np.array([r[0] for r in records])
        costs = np.array([r[1] for r in records])
        return points, costs

    def best(self) -> tp.Tuple[np.ndarray, float]:
        """Returns the record with minimal non-NaN cost"""
        points, costs = self.as_arrays()
        valid = ~np.isnan(costs)
        if not np.any(valid):
            raise errors.DiffEvoRuntimeError("No query with a valid cost was recorded.")
        index = int(np.nanargmin(costs))
        return points[index].copy(), float(costs[index])


class DelayedJob:
    """Future-like object which delays computation
    """

    def __init__(self, func: tp.Callable[..., tp.Any], *args: tp.Any, **kwargs: tp.Any) -> None:
        self.func = func
        self.args = args
        self.kwargs = kwargs
        self._result: tp.Optional[tp.Any] = None
        self._computed = False

    def done(self) -> bool:
        return True

    def result(self) -> tp.Any:
        if not self._computed:
            self._result = self.func(*self.args, **self.kwargs)
            self._computed = True
        return self._result


class SequentialExecutor:
    """Executor which run sequentially and locally, in the calling thread
    (just calls the function when the result is requested)
    """

    def submit(self, fn: tp.Callable[..., tp.Any], *args: tp.Any, **kwargs: tp.Any) -> DelayedJob:
        return DelayedJob(fn, *args, **kwargs)

    def __enter__(self) -> "SequentialExecutor":
        return self

    def __exit__(self, *exc: tp.Any) -> None:
        pass
