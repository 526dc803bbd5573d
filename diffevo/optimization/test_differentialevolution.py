# Copyright (c) Meta Platforms, Inc. and affiliates.
#
# This source code is licensed under the MIT license found in the
# LICENSE file in the root directory of this source tree.

import logging
import threading
from concurrent import futures
import pytest
import numpy as np
import diffevo as de
import diffevo.common.typing as tp
from diffevo.common import errors
from diffevo.common import testing
from . import differentialevolution as devo
from . import utils


def sphere(x: np.ndarray) -> float:
    return float(np.sum(x ** 2))


def rosenbrock(x: np.ndarray) -> float:
    return float(100.0 * (x[1] - x[0] ** 2) ** 2 + (1 - x[0]) ** 2)


class CounterFunction:
    def __init__(self, func: tp.CostFunction = sphere) -> None:
        self.count = 0
        self.func = func
        self._lock = threading.Lock()

    def __call__(self, x: np.ndarray) -> float:
        with self._lock:
            self.count += 1
        return self.func(x)


def _params(**kwargs: tp.Any) -> devo.DifferentialEvolutionParameters:
    config: tp.Dict[str, tp.Any] = dict(
        lower_bounds=[-5.0, -5.0], upper_bounds=[5.0, 5.0], NP=10, max_generations=20, threads=1
    )
    config.update(kwargs)
    return devo.DifferentialEvolutionParameters(**config)


@testing.parametrized(
    small_population=({"NP": 3}, errors.InvalidArgumentError),
    no_generation=({"max_generations": 0}, errors.InvalidArgumentError),
    no_thread=({"threads": 0}, errors.InvalidArgumentError),
    mismatched_bounds=({"upper_bounds": [5.0]}, errors.InvalidArgumentError),
    crossed_bounds=({"lower_bounds": [-5.0, 6.0]}, errors.InvalidArgumentError),
    infinite_bounds=({"upper_bounds": [5.0, np.inf]}, errors.InvalidArgumentError),
    empty_bounds=({"lower_bounds": [], "upper_bounds": []}, errors.InvalidArgumentError),
    guess_dimension=({"initial_guess": [1.0]}, errors.InvalidArgumentError),
    guess_outside=({"initial_guess": [1.0, 7.0]}, errors.InvalidArgumentError),
    guess_nan=({"initial_guess": [1.0, np.nan]}, errors.InvalidArgumentError),
    F_one=({"mutation_factor": 1.0}, errors.DomainError),
    F_zero=({"mutation_factor": 0.0}, errors.DomainError),
    F_negative=({"mutation_factor": -0.5}, errors.DomainError),
    F_nan=({"mutation_factor": np.nan}, errors.DomainError),
)
def test_invalid_parameters(kwargs: tp.Dict[str, tp.Any], error: tp.Type[Exception]) -> None:
    params = _params(**kwargs)
    with pytest.raises(error):
        devo.validate_differential_evolution_parameters(params)
    func = CounterFunction()
    with pytest.raises(error):
        devo.differential_evolution(func, params, 12)
    assert not func.count, "No evaluation should happen before validation"
    with pytest.raises(ValueError):  # both errors are ValueErrors
        devo.validate_differential_evolution_parameters(params)


def test_valid_parameters() -> None:
    params = _params(initial_guess=[5.0, -5.0], mutation_factor=0.99, crossover_probability=0.0)
    devo.validate_differential_evolution_parameters(params)
    assert params.dimension == 2


def test_unconvertible_parameters() -> None:
    with pytest.raises(errors.InvalidArgumentError):
        _params(lower_bounds=[[-5.0], [-5.0, 1.0]])


@testing.parametrized(
    fractional_NP=({"NP": 4.9},),
    nan_NP=({"NP": float("nan")},),
    fractional_generations=({"max_generations": 2.5},),
    string_threads=({"threads": "2"},),
    boolean_threads=({"threads": True},),
)
def test_non_integral_parameters(kwargs: tp.Dict[str, tp.Any]) -> None:
    with pytest.raises(errors.InvalidArgumentError):
        _params(**kwargs)


def test_integral_float_parameters() -> None:
    params = _params(NP=12.0, max_generations=np.int64(3), threads=2.0)
    assert (params.NP, params.max_generations, params.threads) == (12, 3, 2)
    assert isinstance(params.NP, int)


def test_parameters_repr() -> None:
    params = _params(mutation_factor=0.5)
    text = repr(params)
    assert text.startswith("DifferentialEvolutionParameters(")
    assert "mutation_factor=0.5" in text
    assert "NP=10" in text
    assert "crossover_probability" not in text


def test_default_threads() -> None:
    params = devo.DifferentialEvolutionParameters(lower_bounds=[0.0], upper_bounds=[1.0])
    assert params.threads >= 1
    assert params.NP == 500
    assert params.max_generations == 1000
    assert "threads" not in repr(params), "Machine-dependent default should not appear in the repr"
    assert "threads=3" in repr(_params(threads=3))


@testing.parametrized(
    first=(0,),
    middle=(2,),
    last=(4,),
)
def test_donor_indices(index: int) -> None:
    generator = devo.TrialGenerator(_params(NP=5), np.random.RandomState(12))
    for _ in range(50):
        indices = generator.donor_indices(index, 5)
        assert len(set(indices)) == 3
        assert index not in indices
        assert all(0 <= r < 5 for r in indices)


def test_trial_generator_bounds_and_determinism() -> None:
    params = _params(lower_bounds=[-1.0, 0.0, 2.0], upper_bounds=[1.0, 0.5, 3.0], mutation_factor=0.9, NP=8)
    population = utils.random_initial_population(params.lower_bounds, params.upper_bounds, 8, np.random.RandomState(1))
    trials = devo.TrialGenerator(params, np.random.RandomState(2))(population)
    testing.assert_within_bounds(trials, params.lower_bounds, params.upper_bounds)
    again = devo.TrialGenerator(params, np.random.RandomState(2))(population)
    np.testing.assert_array_equal(trials, again)
    assert trials.shape == population.shape


def test_trial_generator_no_crossover() -> None:
    params = _params(lower_bounds=[-1.0] * 6, upper_bounds=[1.0] * 6, crossover_probability=0.0, NP=12)
    population = utils.random_initial_population(params.lower_bounds, params.upper_bounds, 12, np.random.RandomState(3))
    trials = devo.TrialGenerator(params, np.random.RandomState(4))(population)
    # only the forced dimension comes from the mutant
    changed = np.sum(trials != population, axis=1)
    assert np.all(changed <= 1)
    assert np.any(changed == 1)


def test_trial_generator_full_crossover() -> None:
    params = _params(lower_bounds=[-1.0] * 3, upper_bounds=[1.0] * 3, crossover_probability=1.0, NP=6)
    population = np.array([[0.1 * i, -0.1 * i, 0.05 * i] for i in range(6)])
    state = np.random.RandomState(5)
    generator = devo.TrialGenerator(params, state)
    trials = generator(population)
    # replay the draws to rebuild the mutants
    replay = devo.TrialGenerator(params, np.random.RandomState(5))
    for i in range(6):
        r1, r2, r3 = replay.donor_indices(i, 6)
        replay.random_state.randint(3)
        replay.random_state.uniform(0, 1, size=3)
        mutant = np.clip(population[r1] + params.mutation_factor * (population[r2] - population[r3]), -1, 1)
        np.testing.assert_array_almost_equal(trials[i], mutant)


@testing.parametrized(
    sequential=(1,),
    threaded=(3,),
)
def test_evaluator_evaluate(threads: int) -> None:
    population = np.random.RandomState(12).uniform(-1, 1, size=(7, 2))
    queries = utils.QueryLog()
    minimum = utils.CurrentMinimum()
    with futures.ThreadPoolExecutor(max_workers=threads) as executor:
        evaluator = devo.ParallelEvaluator(sphere, threads, executor, queries=queries, current_minimum_cost=minimum)
        cost = evaluator.evaluate(population)
    np.testing.assert_array_almost_equal(cost, [sphere(x) for x in population])
    assert len(queries) == 7
    assert minimum.value == pytest.approx(cost.min())
    assert evaluator.num_evaluations == 7
    assert not evaluator.target_attained.is_set()


def test_selection_never_regresses() -> None:
    params = _params(lower_bounds=[-2.0, -2.0], upper_bounds=[2.0, 2.0], NP=12)
    state = np.random.RandomState(42)
    population = utils.random_initial_population(params.lower_bounds, params.upper_bounds, 12, state)
    generator = devo.TrialGenerator(params, state)
    evaluator = devo.ParallelEvaluator(rosenbrock, 3, utils.SequentialExecutor())
    cost = evaluator.evaluate(population)
    for _ in range(15):
        previous = cost.copy()
        evaluator.evaluate_and_select(generator(population), population, cost)
        assert np.all(cost <= previous)
        np.testing.assert_array_almost_equal(cost, [rosenbrock(x) for x in population])


def test_selection_handles_nan() -> None:
    population = np.array([[0.0], [1.0], [2.0], [3.0]])
    cost = np.array([np.nan, 1.0, 4.0, 9.0])
    trials = np.array([[0.5], [0.5], [-1.0], [0.1]])

    def func(x: np.ndarray) -> float:
        return float("nan") if x[0] < 0 else float(x[0] ** 2)

    evaluator = devo.ParallelEvaluator(func, 2, utils.SequentialExecutor())
    evaluator.evaluate_and_select(trials, population, cost)
    np.testing.assert_array_equal(population.ravel(), [0.5, 0.5, 2.0, 0.1])
    np.testing.assert_array_almost_equal(cost, [0.25, 0.25, 4.0, 0.01])


def test_best_individual() -> None:
    population = np.array([[0.0], [1.0], [2.0]])
    output = devo.best_individual(population, np.array([np.nan, 3.0, 2.0]))
    np.testing.assert_array_equal(output, [2.0])
    output[0] = 12  # this is a copy
    assert population[2, 0] == 2.0
    with pytest.warns(errors.BadCostWarning):
        output = devo.best_individual(population, np.full(3, np.nan))
    np.testing.assert_array_equal(output, [0.0])


def test_sphere_1d() -> None:
    params = de.DifferentialEvolutionParameters(
        lower_bounds=[-5.0],
        upper_bounds=[5.0],
        NP=10,
        mutation_factor=0.5,
        crossover_probability=0.9,
        max_generations=50,
        threads=1,
    )
    x = de.differential_evolution(sphere, params, np.random.RandomState(12))
    assert x.shape == (1,)
    assert abs(x[0]) < 1e-2
    assert sphere(x) < 1e-4


def test_rosenbrock_improves() -> None:
    params = de.DifferentialEvolutionParameters(
        lower_bounds=[-2.0, -2.0], upper_bounds=[2.0, 2.0], NP=40, max_generations=200, threads=4
    )
    queries = de.QueryLog()
    x = de.differential_evolution(rosenbrock, params, 12, queries=queries)
    _, costs = queries.as_arrays()
    # the first NP queries are the initial population
    assert rosenbrock(x) < np.min(costs[:40])
    testing.assert_within_bounds(x, params.lower_bounds, params.upper_bounds)


@testing.parametrized(
    sequential=(1,),
    threaded=(4,),
)
def test_bounds_never_violated(threads: int) -> None:
    lower, upper = [0.0, -1.0, 10.0], [0.1, 1.0, 10.0]
    params = _params(lower_bounds=lower, upper_bounds=upper, threads=threads, max_generations=15, NP=8)
    queries = utils.QueryLog()
    # optimum outside of the box, to push the mutants against the bounds
    x = devo.differential_evolution(lambda x: float(np.sum((x - 20) ** 2)), params, 3, queries=queries)
    points, _ = queries.as_arrays()
    assert len(queries) == 8 * 16
    testing.assert_within_bounds(points, lower, upper)
    testing.assert_within_bounds(x, lower, upper)
    assert x[2] == 10.0


def test_determinism() -> None:
    params = _params(threads=3, NP=9, max_generations=10)
    outputs = []
    for _ in range(2):
        queries = utils.QueryLog()
        x = devo.differential_evolution(rosenbrock, params, np.random.RandomState(24), queries=queries)
        points, costs = queries.as_arrays()
        order = np.lexsort(points.T)
        outputs.append((x, points[order], costs[order]))
    for first, second in zip(*outputs):
        np.testing.assert_array_equal(first, second)


def test_random_state_is_consumed() -> None:
    state = np.random.RandomState(12)
    devo.differential_evolution(sphere, _params(max_generations=2), state)
    x1 = devo.differential_evolution(sphere, _params(max_generations=2), state)
    x2 = devo.differential_evolution(sphere, _params(max_generations=2), np.random.RandomState(12))
    assert not np.array_equal(x1, x2)


def test_initial_guess() -> None:
    guess = [0.0, 0.0]
    first_generation = []
    for initial_guess in [None, guess]:
        queries = utils.QueryLog()
        devo.differential_evolution(
            sphere, _params(max_generations=1, initial_guess=initial_guess), 12, queries=queries
        )
        first_generation.append(queries.as_arrays()[0][:10])
    # only the first member is replaced, other draws are unchanged
    np.testing.assert_array_equal(first_generation[1][0], guess)
    np.testing.assert_array_equal(first_generation[0][1:], first_generation[1][1:])


def test_target_attained_in_initial_population() -> None:
    func = CounterFunction()
    x = devo.differential_evolution(func, _params(initial_guess=[0.0, 0.0]), 12, target_value=0.0)
    np.testing.assert_array_equal(x, [0.0, 0.0])
    assert func.count == 10


def test_target_attained() -> None:
    func = CounterFunction()
    target = 1e-3
    params = _params(max_generations=1000, threads=2)
    x = devo.differential_evolution(func, params, 12, target_value=target)
    assert sphere(x) <= target
    assert func.count < 10 * 1001


def test_nan_target_is_ignored() -> None:
    func = CounterFunction()
    devo.differential_evolution(func, _params(max_generations=5), 12, target_value=float("nan"))
    assert func.count == 10 * 6


def test_cancelled_before_start() -> None:
    token = utils.CancellationToken()
    token.cancel()
    func = CounterFunction()
    x = devo.differential_evolution(func, _params(), 12, cancellation=token)
    assert func.count == 10  # only the initial population
    testing.assert_within_bounds(x, [-5.0, -5.0], [5.0, 5.0])


def test_cancelled_during_run() -> None:
    token = utils.CancellationToken()

    def func(x: np.ndarray) -> float:
        if len(queries) >= 24:
            token.cancel()
        return sphere(x)

    queries = utils.QueryLog()
    devo.differential_evolution(func, _params(max_generations=100), 12, cancellation=token, queries=queries)
    assert len(queries) == 25


def test_event_as_cancellation() -> None:
    event = threading.Event()
    func = CounterFunction()
    devo.differential_evolution(func, _params(max_generations=3), 12, cancellation=event)
    assert func.count == 40
    event.set()
    func = CounterFunction()
    devo.differential_evolution(func, _params(max_generations=3), 12, cancellation=event)
    assert func.count == 10


def test_nan_costs_are_never_selected() -> None:
    def func(x: np.ndarray) -> float:
        return float("nan") if x[0] > 0 else sphere(x)

    queries = utils.QueryLog()
    x = devo.differential_evolution(func, _params(initial_guess=[-1.0, 0.0]), 12, queries=queries)
    assert x[0] <= 0
    _, costs = queries.as_arrays()
    assert np.any(np.isnan(costs)), "NaN evaluations should be recorded too"
    assert func(x) == pytest.approx(np.nanmin(costs))


def test_all_nan_costs() -> None:
    with pytest.warns(errors.BadCostWarning):
        x = devo.differential_evolution(
            lambda x: float("nan"), _params(initial_guess=[1.0, 2.0], max_generations=3), 12
        )
    np.testing.assert_array_equal(x, [1.0, 2.0])


def test_current_minimum_cost() -> None:
    minimum = utils.CurrentMinimum()
    queries = utils.QueryLog()
    x = devo.differential_evolution(
        rosenbrock, _params(threads=2), 12, queries=queries, current_minimum_cost=minimum
    )
    _, costs = queries.as_arrays()
    assert minimum.value == pytest.approx(rosenbrock(x))
    assert minimum.value == pytest.approx(np.min(costs))


def test_cost_function_error_propagates() -> None:
    func = CounterFunction()

    def failing(x: np.ndarray) -> float:
        if func.count >= 15:
            raise ZeroDivisionError("Failing on purpose")
        return func(x)

    with pytest.raises(ZeroDivisionError, match="on purpose"):
        devo.differential_evolution(failing, _params(threads=3), 12)
    assert func.count < 10 * 21


def test_too_many_threads_warning() -> None:
    with pytest.warns(errors.InefficientSettingsWarning):
        devo.differential_evolution(sphere, _params(NP=4, threads=8, max_generations=2), 12)


@pytest.mark.parametrize(
    "target_value,reason",
    [(float("nan"), "generation budget exhausted"), (float("inf"), "target attained")],
    ids=["budget", "target"],
)
def test_stopping_reason_is_logged(target_value: float, reason: str, caplog: tp.Any) -> None:
    with caplog.at_level(logging.DEBUG, logger="diffevo.optimization.differentialevolution"):
        devo.differential_evolution(sphere, _params(max_generations=3), 12, target_value=target_value)
    assert "Starting differential evolution with dimension=2" in caplog.text
    assert reason in caplog.text
