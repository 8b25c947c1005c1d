"""
Label Placement Solver

Chooses at most one candidate per feature so that the total cost is
minimal, where the cost of an assignment is the sum of the active
candidates' costs plus the inactive cost of every unlabeled feature.
Active labels never overlap: a move that activates a candidate ejects
every active label it collides with, so the overlap term of the
objective stays at zero throughout the search.

Pipeline:
1. Reduction - a feature whose k-th best candidate overlaps nothing
   never needs its worse candidates, which are dropped (repeated until
   stable, since dropping candidates frees their neighbours)
2. FALP - greedy initial solution, labeling the least-conflicting
   candidates first
3. Improvement, depending on the search method:
   - Ejection chains: move one label, eject the label it now overlaps,
     move that one, and so on up to the chain degree, keeping the best
     prefix of the chain if it lowers the cost
   - POPMUSIC: grow sub-problems of nearby features around each seed
     and improve them with tabu search (or ejection chains), until no
     sub-problem improves

Every search loop polls the cancellation predicate and gives up with
a CANCELED outcome as soon as it fires.
"""

import heapq
import logging
import math
import random
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .label_position import LabelPosition
from .problem import Problem
from .settings import SearchMethod

logger = logging.getLogger(__name__)

EPSILON = 1e-8


class SolveOutcome(Enum):
    """How a solve call ended."""
    SOLVED = "solved"
    CANCELED = "canceled"
    EMPTY = "empty"


@dataclass
class Solution:
    """Result of solving a Problem."""
    labels: List[LabelPosition] = field(default_factory=list)
    unlabeled: List[LabelPosition] = field(default_factory=list)
    outcome: SolveOutcome = SolveOutcome.SOLVED
    cost: float = 0.0

    @property
    def solved(self) -> bool:
        return self.outcome == SolveOutcome.SOLVED

    @classmethod
    def canceled(cls) -> "Solution":
        return cls(outcome=SolveOutcome.CANCELED)

    @classmethod
    def empty(cls) -> "Solution":
        return cls(outcome=SolveOutcome.EMPTY)


@dataclass
class SolverConfig:
    """Search tunables."""
    search_method: SearchMethod = SearchMethod.POPMUSIC_TABU_CHAIN
    tabu_min_iterations: int = 2  # per sub-problem feature, without improvement
    tabu_max_iterations: int = 4  # per sub-problem feature, hard cap
    popmusic_radius: int = 30  # features per sub-problem
    ejection_chain_degree: int = 50
    tenure: int = 10
    candidate_list_size_factor: float = 0.2
    seed: int = 0


class _EmptyProblem(Exception):
    """A feature has no candidate left to choose from."""


class _Canceled(Exception):
    """The cancellation predicate fired mid-search."""


class LabelSolver:
    """Solves one Problem. Instances are single use."""

    def __init__(self, problem: Problem, config: Optional[SolverConfig] = None,
                 is_canceled: Optional[Callable[[], bool]] = None):
        self.problem = problem
        self.config = config or SolverConfig()
        self._is_canceled = is_canceled or (lambda: False)
        self._rng = random.Random(self.config.seed)

        n = problem.feature_count
        self._starts: List[int] = list(problem.feature_start_ids)
        self._counts: List[int] = list(problem.feature_candidate_counts)
        self._inactive: List[float] = list(problem.inactive_costs)
        self._costs: List[float] = [lp.cost for lp in problem.candidates]
        self._feature_of: List[int] = [0] * problem.total_candidates
        for fid in range(n):
            for lid in range(self._starts[fid], self._starts[fid] + self._counts[fid]):
                self._feature_of[lid] = fid
        self._conflicts: List[List[int]] = []
        self._removed: List[bool] = [False] * problem.total_candidates
        self._active: List[int] = [-1] * n
        self._neighbours: List[List[int]] = []

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def solve(self, display_all: bool = False) -> Solution:
        """Run reduction and search, returning the chosen labels."""
        problem = self.problem
        if self._check_canceled():
            return Solution.canceled()

        try:
            self.build_conflict_graph()
            if problem.feature_count:
                self.reduce()
                self._search()
        except _EmptyProblem:
            logger.debug("Solver found an empty problem")
            return Solution.empty()
        except _Canceled:
            logger.debug("Solver canceled")
            return Solution.canceled()

        return self._solution(display_all)

    def _check_canceled(self) -> bool:
        return bool(self._is_canceled())

    def _poll(self):
        if self._check_canceled():
            raise _Canceled()

    def build_conflict_graph(self):
        """Collect every candidate's conflicting candidate ids."""
        problem = self.problem
        for fid in range(problem.feature_count):
            if self._counts[fid] <= 0:
                raise _EmptyProblem()
        self._conflicts = []
        for lid in range(problem.total_candidates):
            if lid % 256 == 0:
                self._poll()
            self._conflicts.append(problem.conflicts_of(lid))

    def _search(self):
        method = self.config.search_method
        self.init_sol_falp()
        if method == SearchMethod.FALP:
            return
        if method == SearchMethod.CHAIN:
            self.chain_search()
        elif method == SearchMethod.POPMUSIC_TABU:
            self.popmusic(use_tabu=True)
        elif method == SearchMethod.POPMUSIC_CHAIN:
            self.popmusic(use_tabu=False)
        else:
            self.popmusic(use_tabu=True)
            self.chain_search()

    # ------------------------------------------------------------------
    # Candidate bookkeeping
    # ------------------------------------------------------------------

    def _candidates(self, fid: int) -> range:
        start = self._starts[fid]
        return range(start, start + self._counts[fid])

    def _alive_conflicts(self, lid: int) -> List[int]:
        return [o for o in self._conflicts[lid] if not self._removed[o]]

    def _cost_of(self, fid: int, lid: int) -> float:
        return self._costs[lid] if lid >= 0 else self._inactive[fid]

    def current_cost(self) -> float:
        """Objective of the current assignment (conflict-free)."""
        return sum(self._cost_of(fid, lid) for fid, lid in enumerate(self._active))

    @property
    def assignment(self) -> List[int]:
        return list(self._active)

    @property
    def candidate_counts(self) -> List[int]:
        """Candidates still available per feature."""
        return list(self._counts)

    # ------------------------------------------------------------------
    # Reduction
    # ------------------------------------------------------------------

    def reduce(self) -> int:
        """Drop candidates worse than a feature's best overlap-free one.

        Returns:
            Number of candidates removed
        """
        n = self.problem.feature_count
        overlaps = [len(c) for c in self._conflicts]
        decided = [False] * len(overlaps)
        removed = 0
        run = True
        while run:
            run = False
            for fid in range(n):
                for lid in self._candidates(fid):
                    if decided[lid] or overlaps[lid] > 0:
                        continue
                    decided[lid] = True
                    run = True
                    end = self._starts[fid] + self._counts[fid]
                    for worse in range(lid + 1, end):
                        decided[worse] = True
                        self._removed[worse] = True
                        removed += 1
                        for other in self._conflicts[worse]:
                            if not self._removed[other]:
                                overlaps[other] -= 1
                    self._counts[fid] = lid - self._starts[fid] + 1
                    break
        logger.debug("Reduction removed %d candidates", removed)
        return removed

    # ------------------------------------------------------------------
    # Initial solution
    # ------------------------------------------------------------------

    def init_sol_falp(self):
        """Greedy initial solution: least-conflicting candidates first."""
        n = self.problem.feature_count
        alive = {lid for fid in range(n) for lid in self._candidates(fid)}
        degree = {lid: len(self._alive_conflicts(lid)) for lid in alive}
        heap = [(degree[lid], self._costs[lid], lid) for lid in sorted(alive)]
        heapq.heapify(heap)
        self._active = [-1] * n

        def kill(lid: int):
            alive.discard(lid)
            for other in self._alive_conflicts(lid):
                if other in alive:
                    degree[other] -= 1
                    heapq.heappush(heap, (degree[other], self._costs[other], other))

        while heap:
            deg, _, lid = heapq.heappop(heap)
            if lid not in alive or deg != degree[lid]:
                continue
            fid = self._feature_of[lid]
            self._active[fid] = lid
            alive.discard(lid)
            for sibling in self._candidates(fid):
                if sibling in alive:
                    kill(sibling)
            for other in self._alive_conflicts(lid):
                if other in alive:
                    kill(other)

        logger.debug("FALP: %d/%d features labeled, cost=%.4f",
                     sum(1 for lid in self._active if lid >= 0), n, self.current_cost())

    # ------------------------------------------------------------------
    # Moves
    # ------------------------------------------------------------------

    def _ejected_by(self, fid: int, lid: int, active: Callable[[int], int]) -> List[int]:
        """Features whose active label collides with ``lid``."""
        if lid < 0:
            return []
        ejected = []
        for other in self._alive_conflicts(lid):
            g = self._feature_of[other]
            if g != fid and active(g) == other:
                ejected.append(g)
        ejected.sort()
        return ejected

    def _move_delta(self, fid: int, lid: int) -> Tuple[float, List[int]]:
        """Cost change of activating ``lid`` (or -1) for ``fid``."""
        active = self._active
        delta = self._cost_of(fid, lid) - self._cost_of(fid, active[fid])
        ejected = self._ejected_by(fid, lid, active.__getitem__)
        for g in ejected:
            delta += self._inactive[g] - self._costs[active[g]]
        return delta, ejected

    def _apply(self, changes: Dict[int, int]):
        for fid, lid in changes.items():
            self._active[fid] = lid

    # ------------------------------------------------------------------
    # Ejection chains
    # ------------------------------------------------------------------

    def chain(self, seed: int) -> Optional[Tuple[float, Dict[int, int]]]:
        """Best ejection chain starting at a feature.

        Returns:
            (delta, changes) of the best closed chain, or None
        """
        changes: Dict[int, int] = {}
        tabu = {seed}

        def current(f: int) -> int:
            return changes.get(f, self._active[f])

        best: Optional[Tuple[float, Dict[int, int]]] = None
        fid = seed
        acc = 0.0
        for _ in range(max(self.config.ejection_chain_degree, 1)):
            cur = current(fid)
            extension = None
            for lid in self._candidates(fid):
                if lid == cur:
                    continue
                ejected = self._ejected_by(fid, lid, current)
                if any(g in tabu for g in ejected):
                    continue
                delta = acc + self._costs[lid] - self._cost_of(fid, cur)
                for g in ejected:
                    delta += self._inactive[g] - self._costs[current(g)]

                if best is None or delta < best[0] - EPSILON:
                    closed = dict(changes)
                    closed[fid] = lid
                    for g in ejected:
                        closed[g] = -1
                    best = (delta, closed)
                if len(ejected) == 1 and (extension is None or delta < extension[0] - EPSILON):
                    extension = (delta, lid, ejected[0])

            if extension is None:
                break
            acc, lid, ejected_fid = extension
            changes[fid] = lid
            changes[ejected_fid] = -1
            tabu.add(ejected_fid)
            fid = ejected_fid

        return best

    def chain_search(self, features: Optional[Sequence[int]] = None) -> bool:
        """Apply improving ejection chains until none is left.

        Returns:
            True if the cost improved
        """
        seeds = list(features) if features is not None else list(range(self.problem.feature_count))
        if not seeds:
            return False
        # A feature is pending (ok is False) exactly while it sits in the queue
        pending = deque(dict.fromkeys(seeds))
        ok = {fid: False for fid in pending}
        improved = False
        applied = 0
        while pending:
            self._poll()
            seed = pending.popleft()
            ok[seed] = True

            result = self.chain(seed)
            if result is not None and result[0] < -EPSILON:
                delta, changes = result
                self._apply(changes)
                for fid in changes:
                    if ok.get(fid):
                        ok[fid] = False
                        pending.append(fid)
                improved = True
                applied += 1

        if applied:
            logger.debug("Ejection chains: %d applied, cost=%.4f", applied, self.current_cost())
        return improved

    # ------------------------------------------------------------------
    # POPMUSIC
    # ------------------------------------------------------------------

    def _build_neighbours(self):
        n = self.problem.feature_count
        neighbours = [set() for _ in range(n)]
        for fid in range(n):
            for lid in self._candidates(fid):
                for other in self._alive_conflicts(lid):
                    g = self._feature_of[other]
                    if g != fid:
                        neighbours[fid].add(g)
        self._neighbours = [sorted(s) for s in neighbours]

    def sub_problem(self, seed: int) -> List[int]:
        """Features reachable from a seed over candidate conflicts,
        nearest first, at most ``popmusic_radius`` of them."""
        if not self._neighbours:
            self._build_neighbours()
        limit = max(self.config.popmusic_radius, 1)
        order = [seed]
        seen = {seed}
        queue = deque([seed])
        while queue and len(order) < limit:
            fid = queue.popleft()
            for g in self._neighbours[fid]:
                if g in seen:
                    continue
                seen.add(g)
                order.append(g)
                queue.append(g)
                if len(order) >= limit:
                    break
        return order

    def popmusic(self, use_tabu: bool = True) -> bool:
        """Improve sub-problems around every feature until none improves."""
        n = self.problem.feature_count
        self._build_neighbours()
        pending = deque(range(n))
        ok = [False] * n
        improved_any = False
        rounds = 0
        while pending:
            self._poll()
            seed = pending.popleft()
            ok[seed] = True
            rounds += 1

            sub = self.sub_problem(seed)
            if use_tabu:
                improved = self.tabu_search(sub)
            else:
                improved = self.chain_search(sub)

            if improved:
                improved_any = True
                # Neighbours of the seed changed, queue them again
                for fid in sub:
                    if fid != seed and ok[fid]:
                        ok[fid] = False
                        pending.append(fid)

        logger.debug("POPMUSIC (%s): %d sub-problems, cost=%.4f",
                     "tabu" if use_tabu else "chain", rounds, self.current_cost())
        return improved_any

    def tabu_search(self, features: Sequence[int]) -> bool:
        """Tabu search restricted to a set of features.

        Moves change one feature's label (or drop it); labels of other
        sub-problem features it collides with are ejected. A moved
        feature stays tabu for ``tenure`` iterations unless moving it
        again beats the best cost found so far.

        Returns:
            True if the best assignment found is cheaper than the start
        """
        config = self.config
        members = set(features)
        size = len(features)
        max_without_improvement = max(config.tabu_min_iterations * size, 1)
        max_iterations = max(config.tabu_max_iterations * size, 1)

        moves = [(fid, lid) for fid in features for lid in self._candidates(fid)]
        moves.extend((fid, -1) for fid in features)
        list_size = max(1, int(math.ceil(config.candidate_list_size_factor * len(moves))))

        start = {fid: self._active[fid] for fid in features}
        best = dict(start)
        best_acc = 0.0
        acc = 0.0
        tabu_until: Dict[int, int] = {}

        iteration = 0
        since_improvement = 0
        while iteration < max_iterations and since_improvement < max_without_improvement:
            self._poll()
            iteration += 1
            since_improvement += 1

            sample = moves if len(moves) <= list_size else self._rng.sample(moves, list_size)
            chosen = None
            for fid, lid in sample:
                if lid == self._active[fid]:
                    continue
                delta, ejected = self._move_delta(fid, lid)
                if any(g not in members for g in ejected):
                    continue
                aspiration = acc + delta < best_acc - EPSILON
                if tabu_until.get(fid, 0) > iteration and not aspiration:
                    continue
                key = (delta, fid, lid)
                if chosen is None or key < chosen[0]:
                    chosen = (key, ejected)

            if chosen is None:
                continue
            (delta, fid, lid), ejected = chosen
            for g in ejected:
                self._active[g] = -1
                tabu_until[g] = iteration + config.tenure
            self._active[fid] = lid
            tabu_until[fid] = iteration + config.tenure
            acc += delta

            if acc < best_acc - EPSILON:
                best_acc = acc
                best = {f: self._active[f] for f in features}
                since_improvement = 0

        self._apply(best)
        return best_acc < -EPSILON

    # ------------------------------------------------------------------
    # Result
    # ------------------------------------------------------------------

    def _solution(self, display_all: bool) -> Solution:
        problem = self.problem
        labels: List[LabelPosition] = []
        unlabeled: List[LabelPosition] = []
        for fid, lid in enumerate(self._active):
            if lid >= 0:
                labels.append(problem.candidates[lid])
                continue
            best = problem.candidates[self._starts[fid]]
            feature = problem.features[fid]
            layer_display_all = feature.layer.display_all if feature.layer else False
            if display_all or layer_display_all or feature.always_show:
                labels.append(best)
            else:
                unlabeled.append(best)
        unlabeled.extend(problem.positions_with_no_candidates)

        cost = problem.solution_cost(self._active) if problem.feature_count else 0.0
        logger.info("Solved: %d labels placed, %d unplaced, cost=%.4f",
                    len(labels), len(unlabeled), cost)
        return Solution(labels=labels, unlabeled=unlabeled,
                        outcome=SolveOutcome.SOLVED, cost=cost)
