# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import time
import logging
import threading
import numpy as np
import diffevo.common.typing as tp
from diffevo.common import errors
from . import utils

global_logger = logging.getLogger(__name__)

# -------------------------------------------------------------------------------------


class _Watcher:
    """Base class for helpers polling the state of a run from a background thread.
    They can be used as context managers around the call to :code:`differential_evolution`.
    """

    def __init__(self, interval_seconds: float) -> None:
        assert interval_seconds > 0
        self._interval_seconds = interval_seconds
        self._stop_event = threading.Event()
        self._thread: tp.Optional[threading.Thread] = None

    def _poll(self) -> bool:
        """Called at each interval, returns True to stop watching"""
        raise NotImplementedError

    def _finalize(self) -> None:
        pass

    def _loop(self) -> None:
        while not self._stop_event.wait(self._interval_seconds):
            if self._poll():
                return

    def start(self) -> None:
        if self._thread is not None:
            raise errors.DiffEvoRuntimeError(f"{self.__class__.__name__} can only be started once")
        self._thread = threading.Thread(target=self._loop, name=self.__class__.__name__, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
        self._finalize()

    def __enter__(self) -> "_Watcher":
        self.start()
        return self

    def __exit__(self, *exc: tp.Any) -> None:
        self.stop()


# -------------------------------------------------------------------------------------


class ProgressLogger(_Watcher):
    """Logs regularly the smallest cost found so far during a run, from a
    background thread.

    Parameters
    ----------
    current_minimum: CurrentMinimum
        the cell provided as :code:`current_minimum_cost` to :code:`differential_evolution`
    logger:
        given logger that callback will use to log
    log_level:
        log level that logger will write to
    log_interval_seconds:
        number of seconds between two logs

    Example
    -------

    .. code-block:: python

        current_minimum = diffevo.CurrentMinimum()
        with diffevo.callbacks.ProgressLogger(current_minimum, log_interval_seconds=10):
            diffevo.differential_evolution(func, params, seed, current_minimum_cost=current_minimum)
    """

    def __init__(
        self,
        current_minimum: utils.CurrentMinimum,
        *,
        logger: logging.Logger = global_logger,
        log_level: int = logging.INFO,
        log_interval_seconds: float = 1.0,
    ) -> None:
        super().__init__(log_interval_seconds)
        self._current_minimum = current_minimum
        self._logger = logger
        self._log_level = log_level
        self._start = time.time()

    def start(self) -> None:
        self._start = time.time()
        super().start()

    def _log(self) -> None:
        self._logger.log(
            self._log_level,
            "After %.1fs, minimum cost is %s",
            time.time() - self._start,
            self._current_minimum.value,
        )

    def _poll(self) -> bool:
        self._log()
        return False

    def _finalize(self) -> None:
        self._log()


# -------------------------------------------------------------------------------------


class EarlyStopping(_Watcher):
    """Cancels a run when a criterion is met. The criterion is checked
    from a background thread, and the run stops at its next poll point
    (generation boundary or next evaluation).

    Parameters
    ----------
    stopping_criterion: func() -> bool
        function returning True if the run must be stopped
    cancellation: CancellationToken
        the token provided as :code:`cancellation` to :code:`differential_evolution`
    poll_interval_seconds: float
        number of seconds between two checks of the criterion

    Example
    -------
    Stopping a run after 60 seconds:

    >>> token = diffevo.CancellationToken()
    >>> with diffevo.callbacks.EarlyStopping.timer(60, token):
    ...     diffevo.differential_evolution(func, params, seed, cancellation=token)
    """

    def __init__(
        self,
        stopping_criterion: tp.Callable[[], bool],
        cancellation: utils.CancellationToken,
        *,
        poll_interval_seconds: float = 0.05,
    ) -> None:
        super().__init__(poll_interval_seconds)
        self.stopping_criterion = stopping_criterion
        self.cancellation = cancellation

    def _poll(self) -> bool:
        if self.cancellation.is_cancelled:
            return True
        if self.stopping_criterion():
            global_logger.info("Early stopping criterion is reached, cancelling the run")
            self.cancellation.cancel()
            return True
        return False

    @classmethod
    def timer(cls, max_duration: float, cancellation: utils.CancellationToken) -> "EarlyStopping":
        """Early stop when max_duration seconds has been reached (from the first check)"""
        return cls(_DurationCriterion(max_duration), cancellation)

    @classmethod
    def cost_below(
        cls, current_minimum: utils.CurrentMinimum, threshold: float, cancellation: utils.CancellationToken
    ) -> "EarlyStopping":
        """Early stop when the smallest cost found so far is lower or equal to the threshold"""
        return cls(lambda: bool(current_minimum.value <= threshold), cancellation)

    @classmethod
    def no_improvement_stopper(
        cls, current_minimum: utils.CurrentMinimum, patience: float, cancellation: utils.CancellationToken
    ) -> "EarlyStopping":
        """Early stop when the smallest cost found so far did not decrease during patience seconds"""
        return cls(_CostStagnationCriterion(current_minimum, patience), cancellation)


class _DurationCriterion:
    def __init__(self, max_duration: float) -> None:
        self._start = float("inf")
        self._max_duration = max_duration

    def __call__(self) -> bool:
        if np.isinf(self._start):
            self._start = time.time()
        return time.time() > self._start + self._max_duration


class _CostStagnationCriterion:
    def __init__(self, current_minimum: utils.CurrentMinimum, patience: float) -> None:
        self._current_minimum = current_minimum
        self._patience = patience
        self._best_value = float("nan")
        self._last_improvement = float("inf")

    def __call__(self) -> bool:
        value = self._current_minimum.value
        now = time.time()
        # a NaN best value means "unknown", any known value improves on it
        unknown = np.isnan(self._best_value) and not np.isnan(value)
        if np.isinf(self._last_improvement) or unknown or value < self._best_value:
            self._best_value = value
            self._last_improvement = now
            return False
        return now > self._last_improvement + self._patience
