# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

# Storn, R., Price, K. (1997). Differential evolution - a simple and efficient heuristic for global
# optimization over continuous spaces. Journal of global optimization, 11, 341-359.

import os
import logging
import warnings
import threading
from concurrent import futures
import numpy as np
import diffevo.common.typing as tp
from diffevo.common import errors
from diffevo.common import tools
from . import utils

logger = logging.getLogger(__name__)


class DifferentialEvolutionParameters:
    """Configuration of a differential evolution run.

    Parameters
    ----------
    lower_bounds: array-like
        lower bound of each dimension of the search space
    upper_bounds: array-like
        upper bound of each dimension of the search space
    mutation_factor: float
        also called scale factor or F in the literature, must be in (0, 1)
    crossover_probability: float
        probability (CR) for each dimension of a trial vector to be taken from the mutant
    NP: int
        population size in each generation (at least 4)
    max_generations: int
        maximum number of generations (at least 1)
    initial_guess: optional array-like
        point which replaces the first member of the initial population
    threads: optional int
        number of workers evaluating the cost function in parallel (defaults to the number of CPUs)
    """

    # pylint: disable=too-many-arguments,invalid-name

    def __init__(
        self,
        *,
        lower_bounds: tp.ArrayLike,
        upper_bounds: tp.ArrayLike,
        mutation_factor: float = 0.65,
        crossover_probability: float = 0.5,
        NP: int = 500,
        max_generations: int = 1000,
        initial_guess: tp.Optional[tp.ArrayLike] = None,
        threads: tp.Optional[int] = None,
    ) -> None:
        self.lower_bounds = _to_array(lower_bounds, "lower_bounds")
        self.upper_bounds = _to_array(upper_bounds, "upper_bounds")
        self.mutation_factor = float(mutation_factor)
        self.crossover_probability = float(crossover_probability)
        self.NP = _to_int(NP, "NP")
        self.max_generations = _to_int(max_generations, "max_generations")
        self.initial_guess = None if initial_guess is None else _to_array(initial_guess, "initial_guess")
        self.threads = (os.cpu_count() or 1) if threads is None else _to_int(threads, "threads")
        self._default_threads = threads is None

    @property
    def dimension(self) -> int:
        return int(self.lower_bounds.size)

    def __repr__(self) -> str:
        diff = tools.different_from_defaults(instance=self)
        if self._default_threads:
            diff.pop("threads", None)
        params = ", ".join(f"{x}={y!r}" for x, y in sorted(diff.items()))
        return f"{self.__class__.__name__}({params})"


def _to_array(values: tp.ArrayLike, name: str) -> np.ndarray:
    try:
        return np.array(values, dtype=float)
    except (TypeError, ValueError) as e:
        raise errors.InvalidArgumentError(f"{name} must be a sequence of real numbers, got {values!r}") from e


def _to_int(value: tp.Any, name: str) -> int:
    if isinstance(value, (int, np.integer)) and not isinstance(value, bool):
        return int(value)
    if isinstance(value, (float, np.floating)) and float(value).is_integer():
        return int(value)
    raise errors.InvalidArgumentError(f"{name} must be an integer, got {value!r}")


def validate_differential_evolution_parameters(params: DifferentialEvolutionParameters) -> None:
    """Checks the consistency of the parameters, before any work starts

    Raises
    ------
    InvalidArgumentError
        for invalid bounds or initial guess, NP < 4, max_generations < 1 or threads < 1
    DomainError
        if the mutation factor is not in (0, 1)
    """
    utils.validate_bounds(params.lower_bounds, params.upper_bounds)
    if params.NP < 4:
        raise errors.InvalidArgumentError(
            f"The population size must be at least 4, but requested population size of {params.NP}."
        )
    # From "Differential Evolution: A Practical Approach to Global Optimization", section 2.5.1:
    # the discontinuity at F = 1 reduces the number of mutants by half and can result in erratic convergence
    F = params.mutation_factor
    if np.isnan(F) or F >= 1 or F <= 0:
        raise errors.DomainError(f"F in (0, 1) is required, but got F={F}.")
    if params.max_generations < 1:
        raise errors.InvalidArgumentError(
            f"There must be at least one generation, but got max_generations={params.max_generations}."
        )
    if params.initial_guess is not None:
        utils.validate_initial_guess(params.initial_guess, params.lower_bounds, params.upper_bounds)
    if params.threads < 1:
        raise errors.InvalidArgumentError(f"There must be at least one thread, but got threads={params.threads}.")


class TrialGenerator:
    """Builds trial vectors with the rand/1/bin scheme: a mutant
    x_r1 + F * (x_r2 - x_r3) clipped to the bounds, followed by a binomial crossover
    with the incumbent which always keeps at least one dimension of the mutant.

    All draws are performed sequentially on the provided random state, so that
    the sequence of trial vectors only depends on the seed.
    """

    def __init__(self, params: DifferentialEvolutionParameters, random_state: np.random.RandomState) -> None:
        self.random_state = random_state
        self.F = params.mutation_factor
        self.CR = params.crossover_probability
        self.lower = params.lower_bounds
        self.upper = params.upper_bounds

    def donor_indices(self, index: int, population_size: int) -> tp.Tuple[int, int, int]:
        """Draws 3 distinct indices, all different from index"""
        chosen: tp.List[int] = []
        while len(chosen) < 3:
            candidate = int(self.random_state.randint(population_size))
            if candidate != index and candidate not in chosen:
                chosen.append(candidate)
        return chosen[0], chosen[1], chosen[2]

    def __call__(self, population: np.ndarray) -> np.ndarray:
        population_size, dimension = population.shape
        trials = np.empty_like(population)
        for i in range(population_size):
            r1, r2, r3 = self.donor_indices(i, population_size)
            forced = self.random_state.randint(dimension)
            # see equation (4) of Storn & Price
            transfer = self.random_state.uniform(0, 1, size=dimension) < self.CR
            transfer[forced] = True
            mutant = population[r1] + self.F * (population[r2] - population[r3])
            # clipping rather than regenerating the indices keeps the number of draws bounded
            mutant = np.clip(mutant, self.lower, self.upper)
            trials[i] = np.where(transfer, mutant, population[i])
        return trials


class ParallelEvaluator:
    """Evaluates the cost function on a population, spreading indices over workers
    (worker w evaluates indices w, w + threads, w + 2 * threads...).

    Parameters
    ----------
    cost_function: callable
        thread-safe function mapping a point to a float (NaN meaning an invalid point)
    threads: int
        number of workers
    executor: Executor
        object with a :code:`submit(callable, *args)` method returning a Future-like object
    target_value: float
        the run is flagged as finished as soon as a cost is lower or equal to this value (ignored if NaN)
    cancellation: optional flag
        externally owned cancellation flag
    queries: optional QueryLog
        record of all evaluations
    current_minimum_cost: optional CurrentMinimum
        shared cell updated with the smallest cost seen

    Note
    ----
    Population and cost rows are only ever touched by the worker owning the index,
    so they require no locking. If the cost function raises, all workers stop
    at their next index and the first exception is raised once all of them are joined.
    """

    # pylint: disable=too-many-instance-attributes,too-many-arguments

    def __init__(
        self,
        cost_function: tp.CostFunction,
        threads: int,
        executor: tp.ExecutorLike,
        target_value: float = float("nan"),
        cancellation: tp.Optional[tp.FlagLike] = None,
        queries: tp.Optional[utils.QueryLog] = None,
        current_minimum_cost: tp.Optional[utils.CurrentMinimum] = None,
    ) -> None:
        self.cost_function = cost_function
        self.threads = threads
        self.executor = executor
        self.target_value = float(target_value)
        self.cancellation = cancellation
        self.queries = queries
        self.current_minimum_cost = current_minimum_cost
        self.target_attained = threading.Event()
        self._abort = threading.Event()
        self.num_evaluations = 0

    @property
    def cancelled(self) -> bool:
        if self.cancellation is None:
            return False
        # threading.Event instances are always truthy
        is_set = getattr(self.cancellation, "is_set", None)
        return bool(is_set()) if callable(is_set) else bool(self.cancellation)

    def should_stop(self) -> bool:
        return self.target_attained.is_set() or self.cancelled

    def _evaluate(self, point: np.ndarray) -> float:
        cost = float(self.cost_function(np.array(point, copy=True)))
        if self.current_minimum_cost is not None:
            self.current_minimum_cost.update(cost)
        if self.queries is not None:
            self.queries.append(point, cost)
        if not np.isnan(self.target_value) and cost <= self.target_value:
            self.target_attained.set()
        return cost

    def _run(self, worker: tp.Callable[[int], None]) -> None:
        jobs = [self.executor.submit(self._guarded, worker, w) for w in range(self.threads)]
        error: tp.Optional[BaseException] = None
        for job in jobs:  # join all workers before raising
            try:
                job.result()
            except Exception as e:  # pylint: disable=broad-except
                if error is None:
                    error = e
        if error is not None:
            raise error

    def _guarded(self, worker: tp.Callable[[int], None], index: int) -> None:
        if self._abort.is_set():
            return
        try:
            worker(index)
        except BaseException:
            self._abort.set()
            raise

    def evaluate(self, population: np.ndarray) -> np.ndarray:
        """Returns the costs of all members of the population"""
        cost = np.full(population.shape[0], np.nan)

        def worker(w: int) -> None:
            for i in range(w, cost.size, self.threads):
                if self._abort.is_set():
                    return
                cost[i] = self._evaluate(population[i])

        self._run(worker)
        self.num_evaluations += int(cost.size)
        return cost

    def evaluate_and_select(self, trials: np.ndarray, population: np.ndarray, cost: np.ndarray) -> None:
        """Evaluates the trials and replaces, in place, the members of the population
        which are strictly improved by their trial (or whose cost is still unknown).
        NaN trial costs never replace anything.
        """
        counts = [0] * self.threads

        def worker(w: int) -> None:
            for i in range(w, cost.size, self.threads):
                if self._abort.is_set() or self.should_stop():
                    return
                trial_cost = self._evaluate(trials[i])
                counts[w] += 1
                if np.isnan(trial_cost):
                    continue
                if trial_cost < cost[i] or np.isnan(cost[i]):
                    population[i] = trials[i]
                    cost[i] = trial_cost

        self._run(worker)
        self.num_evaluations += sum(counts)


def best_individual(population: np.ndarray, cost: np.ndarray) -> np.ndarray:
    """Returns a copy of the member of the population with minimal cost, NaN costs being ignored.
    If all costs are NaN, the first member is returned (the initial guess if one was provided).
    """
    valid = ~np.isnan(cost)
    if not np.any(valid):
        warnings.warn(
            "All costs are NaN, returning the first member of the population.", errors.BadCostWarning
        )
        return np.array(population[0], copy=True)
    return np.array(population[int(np.nanargmin(cost))], copy=True)


def _best_cost(cost: np.ndarray) -> float:
    valid = cost[~np.isnan(cost)]
    return float(np.min(valid)) if valid.size else float("nan")


def differential_evolution(
    cost_function: tp.CostFunction,
    params: DifferentialEvolutionParameters,
    random_state: tp.RandomLike,
    target_value: float = float("nan"),
    cancellation: tp.Optional[tp.FlagLike] = None,
    queries: tp.Optional[utils.QueryLog] = None,
    current_minimum_cost: tp.Optional[utils.CurrentMinimum] = None,
) -> np.ndarray:
    """Minimizes a cost function over a box with differential evolution

    Parameters
    ----------
    cost_function: callable
        function mapping a point (1d np.ndarray) to a float, it is called concurrently from
        several threads and must therefore be thread-safe. NaN can be returned for invalid points,
        which never replace a valid member of the population.
    params: DifferentialEvolutionParameters
        configuration of the run
    random_state: np.random.RandomState or int
        random state, which is consumed sequentially (an int is used as seed for a new random state).
        For a given seed and number of threads, and with a pure cost function, runs are reproducible.
    target_value: float
        stops as soon as a cost lower or equal to this value is found (ignored if NaN)
    cancellation: CancellationToken
        stops the run (at the next generation or next evaluation) when it is cancelled
    queries: QueryLog
        if provided, all evaluated points and their costs are recorded in it
    current_minimum_cost: CurrentMinimum
        if provided, holds the smallest cost found so far and can be polled during the run

    Returns
    -------
    np.ndarray
        the member of the final population with minimal cost

    Raises
    ------
    InvalidArgumentError, DomainError
        if the parameters are invalid (raised before any evaluation)
    """
    # pylint: disable=too-many-arguments,too-many-locals
    validate_differential_evolution_parameters(params)
    if not isinstance(random_state, np.random.RandomState):
        random_state = np.random.RandomState(random_state)
    NP, threads = params.NP, params.threads
    if threads > NP:
        warnings.warn(
            f"threads={threads} > NP={NP}: {threads - NP} workers will stay idle",
            errors.InefficientSettingsWarning,
        )
    logger.debug(
        "Starting differential evolution with dimension=%s, NP=%s, max_generations=%s and threads=%s",
        params.dimension,
        NP,
        params.max_generations,
        threads,
    )
    population = utils.random_initial_population(params.lower_bounds, params.upper_bounds, NP, random_state)
    if params.initial_guess is not None:
        population[0] = params.initial_guess
    generate_trials = TrialGenerator(params, random_state)
    executor: tp.Any = (
        futures.ThreadPoolExecutor(max_workers=threads) if threads > 1 else utils.SequentialExecutor()
    )
    with executor:
        evaluator = ParallelEvaluator(
            cost_function,
            threads,
            executor,
            target_value=target_value,
            cancellation=cancellation,
            queries=queries,
            current_minimum_cost=current_minimum_cost,
        )
        cost = evaluator.evaluate(population)
        generation = 0
        for generation in range(params.max_generations):
            if evaluator.should_stop():
                break
            # trial vectors are generated sequentially, only evaluations are parallelized
            trials = generate_trials(population)
            evaluator.evaluate_and_select(trials, population, cost)
            logger.debug("Generation %s: best cost is %s", generation, _best_cost(cost))
        else:
            generation = params.max_generations
    if evaluator.cancelled:
        reason = "cancellation"
    elif evaluator.target_attained.is_set():
        reason = "target attained"
    else:
        reason = "generation budget exhausted"
    logger.debug(
        "Stopping after %s generation(s) and %s evaluations (%s), best cost is %s",
        generation,
        evaluator.num_evaluations,
        reason,
        _best_cost(cost),
    )
    return best_individual(population, cost)
