"""
Core clustering algorithm for fastbhc.

This module implements Bayesian hierarchical clustering (BHC) over a sparse
allele matrix. Clusters are merged greedily, always taking the pair with the
highest posterior merge probability r_k, until a single root remains.
"""

import heapq
import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple

from tqdm import tqdm

from .distances import linkage_seed_merges
from .errors import ConfigurationError, InputValidationError
from .hierarchy import Hierarchy
from .likelihood import ClusterStatistic, LikelihoodEngine, NodeScore, leaf_score, merge_score
from .sparse_data import SparseAlleleMatrix


def default_initial_clusters(n_sequences: int) -> int:
    """Number of linkage groups used to seed BHC when none is given: a quarter of the sequences."""
    return max(1, math.ceil(n_sequences / 4))


@dataclass
class _ActiveCluster:
    node_id: int
    statistic: ClusterStatistic
    score: NodeScore


class BayesianHierarchicalClustering:
    """
    Agglomerative Bayesian hierarchical clustering.

    Every pair of active clusters is kept in a max-heap keyed by log r_k.
    After a merge, entries that refer to a consumed cluster are discarded
    lazily when they reach the top, and the new cluster is scored against
    every remaining active cluster. Each step therefore merges a pair with the
    globally highest r_k; ties go to the smallest pair of node ids.

    For library usage:
    - Set show_progress=False to disable progress bars in headless environments
    - Pass a custom logger to integrate with your application's logging system
    """

    def __init__(self,
                 alpha: float = 1.0,
                 initial_clusters: Optional[int] = None,
                 linkage_seed: bool = False,
                 linkage_method: str = "ward",
                 show_progress: bool = True,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the hierarchy builder.

        Args:
            alpha: Dirichlet process concentration parameter (default 1.0)
            initial_clusters: If set, seed BHC with this many groups cut from a
                linkage tree over SNP distances; the linkage subtree of each group
                is kept and scored, so the cut can still split a group
            linkage_seed: Seed with default_initial_clusters(n) groups when
                initial_clusters is not given
            linkage_method: scipy linkage method used for seeding (default ward)
            show_progress: If True, show a progress bar while merging
            logger: Optional logger instance for output; uses default logging if None
        """
        if not alpha > 0:
            raise ConfigurationError(f"alpha must be positive, got {alpha}")
        if initial_clusters is not None and initial_clusters < 1:
            raise ConfigurationError(f"initial_clusters must be at least 1, got {initial_clusters}")
        self.alpha = alpha
        self.initial_clusters = initial_clusters
        self.linkage_seed = linkage_seed
        self.linkage_method = linkage_method
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)

    def build(self, matrix: SparseAlleleMatrix,
              groups: Optional[Sequence[Sequence[str]]] = None) -> Hierarchy:
        """
        Build a scored hierarchy over the sequences in ``matrix``.

        Args:
            matrix: Sparse allele matrix
            groups: Optional starting clusters (lists of labels covering every
                sequence once) used as leaves; overrides linkage seeding

        Returns:
            Hierarchy with a NodeScore for every node
        """
        n = matrix.n_sequences
        if n == 0:
            raise InputValidationError("Cannot cluster an empty set of sequences")

        engine = LikelihoodEngine(matrix)
        groups, seed_merges = self._starting_tree(matrix, groups)
        index = matrix.label_index()

        leaves = []
        scores: List[NodeScore] = []
        active: Dict[int, _ActiveCluster] = {}
        for node_id, group in enumerate(groups):
            if len(group) == 1:
                column = index[group[0]]
                statistic = engine.leaf_statistic(column)
                llk = engine.singleton_log_likelihood(column)
            else:
                statistic = engine.statistic([index[label] for label in group])
                llk = engine.log_likelihood(statistic)
            score = leaf_score(len(group), llk, self.alpha)
            leaves.append(tuple(group))
            scores.append(score)
            active[node_id] = _ActiveCluster(node_id, statistic, score)

        n_leaves = len(leaves)
        merges: List[Tuple[int, int]] = []
        heights: List[float] = [0.0] * n_leaves

        # Seed subtrees are scored like any merge but their order is fixed by the linkage tree
        for i, j in seed_merges:
            left = active.pop(i)
            right = active.pop(j)
            node_id = n_leaves + len(merges)
            score = self._score_pair(engine, left, right)
            merges.append((i, j))
            heights.append(float(len(merges)))
            scores.append(score)
            active[node_id] = _ActiveCluster(node_id, left.statistic + right.statistic, score)

        self.logger.debug(f"Starting BHC from {len(active)} clusters over {n} sequences")

        heap: List[Tuple[float, int, int]] = []
        candidates: Dict[Tuple[int, int], NodeScore] = {}
        ids = sorted(active)
        for pos, i in enumerate(ids):
            for j in ids[pos + 1:]:
                self._push_candidate(heap, candidates, engine, active[i], active[j])

        pbar = None
        if self.show_progress and len(active) > 1:
            pbar = tqdm(total=len(active) - 1, desc="BHC merging", unit=" merges")

        while len(active) > 1:
            neg_log_rk, i, j = heapq.heappop(heap)
            if i not in active or j not in active:
                candidates.pop((i, j), None)
                continue

            score = candidates.pop((i, j))
            left = active.pop(i)
            right = active.pop(j)
            node_id = n_leaves + len(merges)
            merged = _ActiveCluster(node_id, left.statistic + right.statistic, score)

            merges.append((i, j))
            heights.append(float(len(merges)))
            scores.append(score)
            self.logger.debug(f"Merged {i} and {j} into {node_id} (size {score.size}, rk={score.rk:.4f})")

            for other_id in sorted(active):
                self._push_candidate(heap, candidates, engine, active[other_id], merged)
            active[node_id] = merged

            if pbar:
                pbar.update(1)
                pbar.set_postfix({"clusters": len(active), "rk": f"{score.rk:.3f}"})

        if pbar:
            pbar.close()

        hierarchy = Hierarchy(leaves=tuple(leaves), merges=tuple(merges), heights=tuple(heights),
                              scores=tuple(scores))
        hierarchy.validate()
        self.logger.info(f"Built hierarchy with {hierarchy.n_internal} merges, "
                         f"log p(D|T) = {scores[-1].log_tree_likelihood:.2f}")
        return hierarchy

    def _starting_tree(self, matrix: SparseAlleleMatrix,
                       groups: Optional[Sequence[Sequence[str]]]) -> Tuple[List[List[str]], List[Tuple[int, int]]]:
        """
        Leaves and fixed seed merges to start agglomeration from.

        Returns:
            Tuple of (leaf label groups, merges over leaf ids that build the seed subtrees)
        """
        if groups is not None:
            groups = [list(group) for group in groups]
            flattened = [label for group in groups for label in group]
            if sorted(flattened) != sorted(matrix.labels) or any(not group for group in groups):
                raise InputValidationError("Starting groups must cover every sequence exactly once")
            return groups, []

        n = matrix.n_sequences
        singletons = [[label] for label in matrix.labels]
        n_seeds = self.initial_clusters
        if n_seeds is None and self.linkage_seed:
            n_seeds = default_initial_clusters(n)
        if n_seeds is not None and n_seeds < n:
            self.logger.info(f"Seeding BHC with {n_seeds} {self.linkage_method} linkage clusters")
            return singletons, linkage_seed_merges(matrix, n_seeds, self.linkage_method)
        return singletons, []
