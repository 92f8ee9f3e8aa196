"""
Empirical Bayes choice of the Dirichlet prior.

The prior table is a scaled convex combination of the symmetric and the
population allele-frequency priors. A single scalar (the mixing weight, or
the concentration scale) is searched to maximise the marginal likelihood
log p(D|T) of the BHC hierarchy built under the candidate prior. Every
evaluation is a full hierarchy build, so the search uses a short grid
followed by a few golden-section steps.
"""

import logging
import math
import os
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

import numpy as np
from tqdm import tqdm

from .core import BayesianHierarchicalClustering
from .errors import ConfigurationError
from .sparse_data import SparseAlleleMatrix, mixed_prior

PRIOR_MODES = ("fixed-symmetric", "fixed-population", "optimize-symmetric", "optimize-population")

# Search interval of the symmetric prior's concentration scale
SCALE_INTERVAL = (5e-4, 10.0)

GOLDEN_RATIO = (math.sqrt(5.0) - 1.0) / 2.0


@dataclass
class PriorSearchResult:
    """Outcome of a prior search."""
    mode: str
    parameter: float
    log_likelihood: float
    mixing: float
    scale: float
    evaluations: List[Tuple[float, float]] = field(default_factory=list)  # (parameter, log p(D|T)) in evaluation order


def _evaluate_prior_worker(matrix: SparseAlleleMatrix, mixing: float, scale: float,
                           alpha: float, initial_clusters: Optional[int],
                           linkage_seed: bool = False) -> float:
    """Build a hierarchy under one candidate prior and return its log p(D|T)."""
    candidate = matrix.with_prior(mixed_prior(matrix, mixing, scale))
    builder = BayesianHierarchicalClustering(alpha=alpha,
                                             initial_clusters=initial_clusters,
                                             linkage_seed=linkage_seed,
                                             show_progress=False,
                                             logger=logging.getLogger(__name__))
    hierarchy = builder.build(candidate)
    return hierarchy.score(hierarchy.root).log_tree_likelihood


class PriorOptimizer:
    """
    Grid plus golden-section search over one prior parameter.

    Ties are broken towards the most conservative value: the symmetric prior
    (mixing 0) when searching the mixing weight, and the unscaled prior when
    searching the concentration scale. Golden-section refinement only replaces
    the grid optimum on a strict improvement.
    """

    def __init__(self,
                 n_grid: int = 5,
                 n_refine: int = 6,
                 alpha: float = 1.0,
                 initial_clusters: Optional[int] = None,
                 linkage_seed: bool = False,
                 num_threads: Optional[int] = None,
                 show_progress: bool = True,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            n_grid: Number of evenly spaced grid points (at least 2)
            n_refine: Number of golden-section iterations after the grid (0 disables refinement)
            alpha: Dirichlet process concentration used for every build
            initial_clusters: Linkage seeding passed to each BHC build
            linkage_seed: Seed each build with default_initial_clusters(n) groups when
                initial_clusters is None
            num_threads: Worker processes for grid evaluation (default: auto-detect, 0/1: in-process)
            show_progress: If True, show a progress bar over grid evaluations
            logger: Optional logger instance for output; uses default logging if None
        """
        if n_grid < 2:
            raise ConfigurationError(f"n_grid must be at least 2, got {n_grid}")
        if n_refine < 0:
            raise ConfigurationError(f"n_refine must be non-negative, got {n_refine}")
        self.n_grid = n_grid
        self.n_refine = n_refine
        self.alpha = alpha
        self.initial_clusters = initial_clusters
        self.linkage_seed = linkage_seed
        self.num_threads = num_threads
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)

    def apply(self, matrix: SparseAlleleMatrix, mode: str) -> Tuple[SparseAlleleMatrix, PriorSearchResult]:
        """
        Choose a prior according to ``mode`` and return the matrix carrying it.

        Modes:
            fixed-symmetric: symmetric prior
            fixed-population: population allele-frequency prior
            optimize-symmetric: symmetric prior, concentration scale searched on a log scale
            optimize-population: mixing weight between symmetric and population priors searched on [0, 1]
        """
        if mode not in PRIOR_MODES:
            raise ConfigurationError(f"Unknown prior mode '{mode}', expected one of {', '.join(PRIOR_MODES)}")

        if mode == "fixed-symmetric":
            result = PriorSearchResult(mode, 0.0, float("nan"), mixing=0.0, scale=1.0)
        elif mode == "fixed-population":
            result = PriorSearchResult(mode, 1.0, float("nan"), mixing=1.0, scale=1.0)
        elif mode == "optimize-symmetric":
            result = self.optimise_scale(matrix)
        else:
            result = self.optimise_mixing(matrix)

        prior = mixed_prior(matrix, result.mixing, result.scale)
        return matrix.with_prior(prior), result

    def optimise_mixing(self, matrix: SparseAlleleMatrix) -> PriorSearchResult:
        """Search the population-prior weight on [0, 1]."""
        def to_prior(mixing):
            return mixing, 1.0

        parameter, llk, evaluations = self._search(matrix, to_prior, 0.0, 1.0, conservative=0.0)
        self.logger.info(f"Optimised prior mixing weight: {parameter:.4f} (log p(D|T) = {llk:.2f})")
        return PriorSearchResult("optimize-population", parameter, llk, mixing=parameter, scale=1.0,
                                 evaluations=evaluations)

    def optimise_scale(self, matrix: SparseAlleleMatrix, mixing: float = 0.0) -> PriorSearchResult:
        """Search the concentration scale of the prior on a log scale."""
        def to_prior(log_scale):
            return mixing, math.exp(log_scale)

        low, high = (math.log(bound) for bound in SCALE_INTERVAL)
        log_scale, llk, evaluations = self._search(matrix, to_prior, low, high, conservative=0.0)
        scale = math.exp(log_scale)
        self.logger.info(f"Optimised prior scale: {scale:.4g} (log p(D|T) = {llk:.2f})")
        return PriorSearchResult("optimize-symmetric", scale, llk, mixing=mixing, scale=scale,
                                 evaluations=[(math.exp(p), v) for p, v in evaluations])

    def _search(self, matrix: SparseAlleleMatrix,
                to_prior: Callable[[float], Tuple[float, float]],
                low: float, high: float,
                conservative: float) -> Tuple[float, float, List[Tuple[float, float]]]:
        """
        Maximise log p(D|T) over a parameter interval.

        Returns:
            Tuple of (best parameter, best log-likelihood, evaluations in order)
        """
        cache: Dict[float, float] = {}
        evaluations: List[Tuple[float, float]] = []

        grid = [float(x) for x in np.linspace(low, high, self.n_grid)]
        if low <= conservative <= high and conservative not in grid:
            grid.append(conservative)
        # Evaluate in order of distance from the conservative value so ties keep the earliest point
        grid.sort(key=lambda x: (abs(x - conservative), x))
        for parameter, value in zip(grid, self._evaluate_many(matrix, to_prior, grid)):
            cache[parameter] = value
            evaluations.append((parameter, value))

        best_parameter = grid[0]
        for parameter in grid[1:]:
            if cache[parameter] > cache[best_parameter]:
                best_parameter = parameter
        best_value = cache[best_parameter]

        ordered = sorted(grid)
        position = ordered.index(best_parameter)
        a = ordered[max(position - 1, 0)]
        b = ordered[min(position + 1, len(ordered) - 1)]

        def evaluate(parameter: float) -> float:
            if parameter not in cache:
                cache[parameter] = self._evaluate(matrix, to_prior, parameter)
                evaluations.append((parameter, cache[parameter]))
            return cache[parameter]

        if self.n_refine and b > a:
            c = b - GOLDEN_RATIO * (b - a)
            d = a + GOLDEN_RATIO * (b - a)
            fc, fd = evaluate(c), evaluate(d)
            for _ in range(self.n_refine - 1):
                if fc >= fd:
                    b, d, fd = d, c, fc
                    c = b - GOLDEN_RATIO * (b - a)
                    fc = evaluate(c)
                else:
                    a, c, fc = c, d, fd
                    d = a + GOLDEN_RATIO * (b - a)
                    fd = evaluate(d)
            for parameter in sorted((c, d), key=lambda x: (abs(x - conservative), x)):
                if cache[parameter] > best_value:
                    best_parameter, best_value = parameter, cache[parameter]

        return best_parameter, best_value, evaluations

    def _evaluate(self, matrix, to_prior, parameter: float) -> float:
        mixing, scale = to_prior(parameter)
        value = _evaluate_prior_worker(matrix, mixing, scale, self.alpha, self.initial_clusters,
                                       self.linkage_seed)
        self.logger.debug(f"Prior parameter {parameter:.4g}: log p(D|T) = {value:.4f}")
        return value

    def _evaluate_many(self, matrix, to_prior, parameters: List[float]) -> List[float]:
        """Evaluate grid points, in worker processes when more than one is requested."""
        num_threads = self.num_threads
        if num_threads is None:
            num_threads = min(os.cpu_count() or 4, len(parameters))

        if num_threads <= 1:
            iterator = tqdm(parameters, desc="Prior grid", unit=" builds") if self.show_progress else parameters
            return [self._evaluate(matrix, to_prior, parameter) for parameter in iterator]

        with ProcessPoolExecutor(max_workers=num_threads) as executor:
            futures = []
            for parameter in parameters:
                mixing, scale = to_prior(parameter)
                futures.append(executor.submit(_evaluate_prior_worker, matrix, mixing, scale,
                                               self.alpha, self.initial_clusters, self.linkage_seed))
            iterator = tqdm(futures, desc="Prior grid", unit=" builds") if self.show_progress else futures
            values = [future.result() for future in iterator]

        for parameter, value in zip(parameters, values):
            self.logger.debug(f"Prior parameter {parameter:.4g}: log p(D|T) = {value:.4f}")
        return values
