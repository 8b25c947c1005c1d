"""
Tests for the label placement solver.

Tests cover:
- Reduction of dominated candidates
- FALP initial solution
- Ejection chains and tabu search from an empty assignment
- Tabu iteration limits, tenure and aspiration; ejection chain degree
- POPMUSIC sub-problems
- Search methods, determinism and solution assembly
- Cancellation and empty problems
"""

from types import SimpleNamespace

import pytest
from shapely.geometry import Point, box

from labelplace.engine.feature import Arrangement, FeaturePart, LabelFeature
from labelplace.engine.labeling_engine import LabelingEngine
from labelplace.engine.problem import Problem
from labelplace.engine.settings import SearchMethod
from labelplace.engine.solver import LabelSolver, Solution, SolveOutcome, SolverConfig


EXTENT = (-50.0, -50.0, 150.0, 150.0)


@pytest.fixture
def three_points_problem(three_points_engine):
    return three_points_engine.extract_problem(EXTENT)


@pytest.fixture
def crowded_problem(crowded_engine, crowded_extent):
    return crowded_engine.extract_problem(crowded_extent)


class GraphProblem:
    """Problem stand-in given directly as candidate costs and conflicts."""

    def __init__(self, costs, inactive, conflicts=()):
        self.feature_candidate_counts = tuple(len(c) for c in costs)
        starts, start = [], 0
        for c in costs:
            starts.append(start)
            start += len(c)
        self.feature_start_ids = tuple(starts)
        self.feature_count = len(costs)
        self.inactive_costs = tuple(inactive)
        self.candidates = [SimpleNamespace(cost=cost) for c in costs for cost in c]
        self.total_candidates = len(self.candidates)
        self._conflicts = {lid: [] for lid in range(self.total_candidates)}
        for a, b in conflicts:
            self._conflicts[a].append(b)
            self._conflicts[b].append(a)

    def conflicts_of(self, lid):
        return self._conflicts[lid]


def cascade_problem():
    """Three features where only a chain of three moves improves.

    Feature 0 (candidate 0) is unlabeled and collides with feature 1's
    active label 1; feature 1's other label 2 collides with feature 2's
    active label 3; feature 2's other label 4 is free.
    """
    return GraphProblem(costs=[[0.0], [0.0, 0.5], [0.0, 0.5]],
                        inactive=[10.0, 10.0, 10.0],
                        conflicts=[(0, 1), (2, 3)])


def recording_solver(problem, config):
    """Solver that records the assignment each time the search polls."""
    history = []
    solver = LabelSolver(problem, config, is_canceled=lambda: history.append(solver.assignment))
    solver.build_conflict_graph()
    history.clear()
    return solver, history


@pytest.fixture
def pair_engine(make_point):
    """Two points whose only candidates overlap."""
    engine = LabelingEngine()
    layer = engine.add_layer("pair", "pair", Arrangement.OVER_POINT)
    layer.register_feature(make_point("a", 0, 0, is_obstacle=False))
    layer.register_feature(make_point("b", 3, 0, is_obstacle=False))
    return engine


# =============================================================================
# Reduction
# =============================================================================

class TestReduction:
    def test_isolated_features_keep_best_candidate(self, three_points_problem):
        solver = LabelSolver(three_points_problem)
        solver.build_conflict_graph()
        assert solver.reduce() == 9
        assert solver.candidate_counts == [1, 1, 1]

    def test_conflicting_candidates_kept(self, pair_engine):
        problem = pair_engine.extract_problem(EXTENT)
        solver = LabelSolver(problem)
        solver.build_conflict_graph()
        assert solver.reduce() == 0
        assert solver.candidate_counts == [1, 1]

    def test_reduction_never_empties_a_feature(self, crowded_problem):
        solver = LabelSolver(crowded_problem)
        solver.build_conflict_graph()
        solver.reduce()
        assert all(count >= 1 for count in solver.candidate_counts)


# =============================================================================
# Initial solution
# =============================================================================

class TestFalp:
    def test_labels_isolated_features(self, three_points_problem):
        solver = LabelSolver(three_points_problem)
        solver.build_conflict_graph()
        solver.init_sol_falp()
        assert solver.assignment == [0, 4, 8]

    def test_one_of_two_conflicting(self, pair_engine):
        solver = LabelSolver(pair_engine.extract_problem(EXTENT))
        solver.build_conflict_graph()
        solver.init_sol_falp()
        assert solver.assignment == [0, -1]

    def test_conflict_free(self, crowded_problem, check_conflict_free):
        solver = LabelSolver(crowded_problem)
        solver.build_conflict_graph()
        solver.init_sol_falp()
        labels = [crowded_problem.candidates[lid] for lid in solver.assignment if lid >= 0]
        assert labels
        check_conflict_free(labels)


# =============================================================================
# Local search
# =============================================================================

class TestLocalSearch:
    def test_chain_search_from_empty_assignment(self, three_points_problem):
        solver = LabelSolver(three_points_problem)
        solver.build_conflict_graph()
        assert solver.chain_search()
        assert solver.assignment == [0, 4, 8]

    def test_chain_rejects_non_improving_swap(self, pair_engine):
        solver = LabelSolver(pair_engine.extract_problem(EXTENT))
        solver.build_conflict_graph()
        solver.init_sol_falp()
        assert not solver.chain_search()
        assert solver.assignment == [0, -1]

    def test_tabu_search_from_empty_assignment(self, three_points_problem):
        config = SolverConfig(candidate_list_size_factor=1.0)
        solver = LabelSolver(three_points_problem, config)
        solver.build_conflict_graph()
        assert solver.tabu_search([0, 1, 2])
        assert solver.assignment == [0, 4, 8]

    def test_tabu_search_keeps_best(self, crowded_problem):
        solver = LabelSolver(crowded_problem)
        solver.build_conflict_graph()
        solver.init_sol_falp()
        before = solver.current_cost()
        solver.tabu_search(list(range(crowded_problem.feature_count)))
        assert solver.current_cost() <= before + 1e-9

    def test_sub_problem_growth(self, crowded_problem):
        solver = LabelSolver(crowded_problem, SolverConfig(popmusic_radius=5))
        solver.build_conflict_graph()
        sub = solver.sub_problem(12)
        assert sub[0] == 12
        assert len(sub) == 5
        assert len(set(sub)) == 5

    def test_sub_problem_of_isolated_feature(self, three_points_problem):
        solver = LabelSolver(three_points_problem)
        solver.build_conflict_graph()
        assert solver.sub_problem(1) == [1]


# =============================================================================
# Search bounds
# =============================================================================

class TestTabuBounds:
    @pytest.mark.parametrize("min_it,max_it,iterations", [
        (5, 1, 1),   # hard cap
        (5, 3, 3),   # hard cap before the no-improvement limit
        (1, 10, 2),  # one improving iteration, then one without
        (0, 10, 2),  # no-improvement limit never drops below one iteration
    ])
    def test_iteration_limits(self, min_it, max_it, iterations):
        config = SolverConfig(tabu_min_iterations=min_it, tabu_max_iterations=max_it,
                              candidate_list_size_factor=1.0)
        solver, history = recording_solver(GraphProblem([[0.1, 0.2, 0.3]], [10.0]), config)
        assert solver.tabu_search([0])
        assert len(history) == iterations
        assert solver.assignment == [0]

    def test_limits_scale_with_sub_problem_size(self):
        config = SolverConfig(tabu_min_iterations=5, tabu_max_iterations=1,
                              candidate_list_size_factor=1.0)
        problem = GraphProblem([[0.1], [0.1], [0.1]], [10.0, 10.0, 10.0])
        solver, history = recording_solver(problem, config)
        solver.tabu_search([0, 1, 2])
        assert len(history) == 3
        assert solver.assignment == [0, 1, 2]

    def test_tenure_blocks_moved_feature(self):
        config = SolverConfig(tabu_min_iterations=2, tabu_max_iterations=3,
                              candidate_list_size_factor=1.0, tenure=10)
        solver, history = recording_solver(GraphProblem([[0.1, 0.2, 0.3]], [10.0]), config)
        solver.tabu_search([0])
        assert history == [[-1], [0], [0]]

    def test_zero_tenure_lets_feature_move_again(self):
        config = SolverConfig(tabu_min_iterations=2, tabu_max_iterations=3,
                              candidate_list_size_factor=1.0, tenure=0)
        solver, history = recording_solver(GraphProblem([[0.1, 0.2, 0.3]], [10.0]), config)
        solver.tabu_search([0])
        assert history == [[-1], [0], [1]]
        # The best assignment seen is restored
        assert solver.assignment == [0]

    def test_aspiration_overrides_tenure(self):
        # Feature 0's cheap label 0 collides with feature 1's only label 2
        problem = GraphProblem([[0.1, 0.5], [0.1]], [10.0, 10.0], conflicts=[(0, 2)])
        config = SolverConfig(candidate_list_size_factor=1.0, tenure=10)
        solver, history = recording_solver(problem, config)
        assert solver.tabu_search([0, 1])
        # Feature 0 is labeled, ejected by feature 1, then moved again while
        # still tabu because the move reaches a new best cost
        assert history[:4] == [[-1, -1], [0, -1], [-1, 2], [1, 2]]
        assert solver.assignment == [1, 2]


class TestChainBounds:
    @pytest.mark.parametrize("degree", [1, 2])
    def test_short_chains_cannot_reach_improvement(self, degree):
        solver = LabelSolver(cascade_problem(), SolverConfig(ejection_chain_degree=degree))
        solver.build_conflict_graph()
        solver._apply({1: 1, 2: 3})
        delta, changes = solver.chain(0)
        assert delta == pytest.approx(0.0)
        assert changes == {0: 0, 1: -1}
        assert not solver.chain_search()
        assert solver.assignment == [-1, 1, 3]

    def test_long_enough_chain_improves(self):
        solver = LabelSolver(cascade_problem(), SolverConfig(ejection_chain_degree=3))
        solver.build_conflict_graph()
        solver._apply({1: 1, 2: 3})
        delta, changes = solver.chain(0)
        assert delta == pytest.approx(-9.0)
        assert changes == {0: 0, 1: 2, 2: 4}
        assert solver.chain_search()
        assert solver.assignment == [0, 2, 4]

    def test_chain_search_with_repeated_seeds(self):
        solver = LabelSolver(cascade_problem(), SolverConfig(ejection_chain_degree=3))
        solver.build_conflict_graph()
        solver._apply({1: 1, 2: 3})
        assert solver.chain_search([2, 0, 0, 2])
        assert solver.assignment == [0, 2, 4]

    @pytest.mark.parametrize("degree,improves", [(1, False), (3, True)])
    def test_popmusic_chains(self, degree, improves):
        solver = LabelSolver(cascade_problem(), SolverConfig(ejection_chain_degree=degree))
        solver.build_conflict_graph()
        solver._apply({1: 1, 2: 3})
        assert solver.popmusic(use_tabu=False) is improves
        assert solver.assignment == ([0, 2, 4] if improves else [-1, 1, 3])


# =============================================================================
# Search methods
# =============================================================================

class TestSearchMethods:
    @pytest.mark.parametrize("method", list(SearchMethod))
    def test_methods_are_conflict_free(self, crowded_problem, method, check_conflict_free):
        solution = LabelSolver(crowded_problem, SolverConfig(search_method=method)).solve()
        assert solution.outcome == SolveOutcome.SOLVED
        check_conflict_free(solution.labels)
        assert len(solution.labels) + len(solution.unlabeled) == crowded_problem.feature_count

    @pytest.mark.parametrize("method", [m for m in SearchMethod if m != SearchMethod.FALP])
    def test_search_never_worse_than_falp(self, crowded_problem, method):
        falp = LabelSolver(crowded_problem, SolverConfig(search_method=SearchMethod.FALP)).solve()
        improved = LabelSolver(crowded_problem, SolverConfig(search_method=method)).solve()
        assert improved.cost <= falp.cost + 1e-9

    def test_deterministic(self, crowded_problem):
        first = LabelSolver(crowded_problem).solve()
        second = LabelSolver(crowded_problem).solve()
        assert [lp.problem_id for lp in first.labels] == [lp.problem_id for lp in second.labels]
        assert first.cost == second.cost

    def test_cost_matches_assignment(self, crowded_problem):
        solver = LabelSolver(crowded_problem)
        solution = solver.solve()
        assert solution.cost == pytest.approx(crowded_problem.solution_cost(solver.assignment))


# =============================================================================
# Solution assembly
# =============================================================================

class TestSolution:
    def test_conflict_leaves_one_unlabeled(self, pair_engine):
        solution = LabelSolver(pair_engine.extract_problem(EXTENT)).solve()
        assert len(solution.labels) == 1
        assert len(solution.unlabeled) == 1
        assert solution.labels[0].feature.feature_id == "a"
        assert solution.unlabeled[0].feature.feature_id == "b"

    def test_display_all(self, pair_engine):
        solution = LabelSolver(pair_engine.extract_problem(EXTENT)).solve(display_all=True)
        assert len(solution.labels) == 2
        assert solution.unlabeled == []

    def test_layer_display_all(self, make_point):
        engine = LabelingEngine()
        layer = engine.add_layer("pair", "pair", Arrangement.OVER_POINT, display_all=True)
        layer.register_feature(make_point("a", 0, 0, is_obstacle=False))
        layer.register_feature(make_point("b", 3, 0, is_obstacle=False))
        solution = LabelSolver(engine.extract_problem(EXTENT)).solve()
        assert len(solution.labels) == 2

    def test_always_show_wins(self, make_point):
        engine = LabelingEngine()
        layer = engine.add_layer("pair", "pair", Arrangement.OVER_POINT)
        layer.register_feature(make_point("a", 0, 0, is_obstacle=False))
        layer.register_feature(make_point("b", 3, 0, is_obstacle=False, always_show=True))
        solution = LabelSolver(engine.extract_problem(EXTENT)).solve()
        assert [lp.feature.feature_id for lp in solution.labels] == ["b"]
        assert [lp.feature.feature_id for lp in solution.unlabeled] == ["a"]

    def test_unplaceable_positions_reported(self, engine, point_layer, make_point):
        engine.show_partial_labels = False
        point_layer.register_feature(make_point("far", 120, 120))
        problem = engine.extract_problem(EXTENT, box(0, 0, 100, 100))
        solution = LabelSolver(problem).solve()
        assert solution.outcome == SolveOutcome.SOLVED
        assert solution.labels == []
        assert len(solution.unlabeled) == 1


# =============================================================================
# Cancellation and empty problems
# =============================================================================

class TestOutcomes:
    def test_canceled_before_start(self, crowded_problem):
        solution = LabelSolver(crowded_problem, is_canceled=lambda: True).solve()
        assert solution.outcome == SolveOutcome.CANCELED
        assert solution.labels == []
        assert solution.unlabeled == []

    @pytest.mark.parametrize("method", [m for m in SearchMethod if m != SearchMethod.FALP])
    def test_canceled_mid_search(self, crowded_problem, method):
        calls = []

        def canceled():
            calls.append(1)
            return len(calls) > 3

        solution = LabelSolver(crowded_problem, SolverConfig(search_method=method),
                               is_canceled=canceled).solve()
        assert solution.outcome == SolveOutcome.CANCELED
        assert solution.labels == []

    def test_empty_feature(self):
        feature = LabelFeature("a", Point(0, 0), "a", width=1, height=1)
        problem = Problem(EXTENT)
        problem.features = (FeaturePart(feature, feature.geometry),)
        problem.feature_candidate_counts = (0,)
        problem.feature_start_ids = (0,)
        problem.inactive_costs = (32.0,)
        solution = LabelSolver(problem).solve()
        assert solution.outcome == SolveOutcome.EMPTY
        assert solution.labels == []

    def test_empty_problem(self):
        solution = LabelSolver(Problem(EXTENT)).solve()
        assert solution.outcome == SolveOutcome.SOLVED
        assert solution.labels == []
        assert solution.cost == 0.0

    def test_solution_helpers(self):
        assert Solution().solved
        assert not Solution.canceled().solved
        assert Solution.empty().outcome == SolveOutcome.EMPTY
