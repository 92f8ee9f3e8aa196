"""
Best partition of a fixed hierarchy.

Any rooted binary hierarchy over the sequences (built by BHC, cut from a
linkage tree, or converted from a phylogeny) is scored bottom-up with the
same merge posterior used during agglomeration, then cut top-down: a node
whose log r_k reaches the threshold becomes one cluster, otherwise both of
its children are examined.
"""

import logging
import math
from typing import Dict, List, Mapping, Optional

from .errors import ConfigurationError, HierarchyStructureError, InputValidationError
from .hierarchy import Hierarchy
from .likelihood import ClusterStatistic, LikelihoodEngine, NodeScore, leaf_score, merge_score
from .sparse_data import SparseAlleleMatrix

DEFAULT_THRESHOLD = math.log(0.5)


def check_labels(matrix: SparseAlleleMatrix, hierarchy: Hierarchy) -> None:
    """Raise HierarchyStructureError unless hierarchy and matrix hold exactly the same labels."""
    matrix_labels = set(matrix.labels)
    tree_labels = set(hierarchy.labels)
    if matrix_labels != tree_labels:
        missing = sorted(matrix_labels - tree_labels)
        extra = sorted(tree_labels - matrix_labels)
        raise HierarchyStructureError(
            "Label mismatch between hierarchy and allele matrix: "
            f"{len(missing)} missing from hierarchy {missing[:10]}, "
            f"{len(extra)} not in matrix {extra[:10]}"
        )


def clusters_from_partition(partition: Mapping[str, int]) -> Dict[int, List[str]]:
    """Group labels by cluster id, in order of first appearance."""
    clusters: Dict[int, List[str]] = {}
    for label, cluster_id in partition.items():
        clusters.setdefault(cluster_id, []).append(label)
    return clusters


class TreePartitionOptimizer:
    """
    Score a hierarchy and extract the partition selected by the r_k cut.

    The cut is greedy along the hierarchy: a node with low r_k is always split
    even if a different cut elsewhere would give a higher total likelihood.
    """

    def __init__(self,
                 alpha: float = 1.0,
                 threshold: float = DEFAULT_THRESHOLD,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            alpha: Dirichlet process concentration parameter (default 1.0)
            threshold: Log r_k at or above which a node is kept as one cluster (default log 0.5)
            logger: Optional logger instance for output; uses default logging if None
        """
        if not alpha > 0:
            raise ConfigurationError(f"alpha must be positive, got {alpha}")
        self.alpha = alpha
        self.threshold = threshold
        self.logger = logger or logging.getLogger(__name__)

    def best_partition(self, matrix: SparseAlleleMatrix, hierarchy: Hierarchy) -> Dict[str, int]:
        """
        Score ``hierarchy`` against ``matrix`` and cut it.

        Returns:
            Mapping from sequence label to cluster id (1..K), in matrix label order
        """
        scored = self.score(matrix, hierarchy)
        partition = self.cut(scored)
        return {label: partition[label] for label in matrix.labels}

    def score(self, matrix: SparseAlleleMatrix, hierarchy: Hierarchy) -> Hierarchy:
        """Compute every node's NodeScore in one post-order pass and return a scored copy."""
        hierarchy.validate()
        check_labels(matrix, hierarchy)

        self.logger.debug(f"Calculating node marginal likelihoods for {hierarchy.n_nodes} nodes")
        engine = LikelihoodEngine(matrix)
        index = matrix.label_index()

        statistics: Dict[int, ClusterStatistic] = {}
        scores: List[Optional[NodeScore]] = [None] * hierarchy.n_nodes
        for node_id in hierarchy.postorder():
            if hierarchy.is_leaf(node_id):
                members = hierarchy.leaves[node_id]
                if len(members) == 1:
                    column = index[members[0]]
                    statistic = engine.leaf_statistic(column)
                    llk = engine.singleton_log_likelihood(column)
                else:
                    statistic = engine.statistic([index[label] for label in members])
                    llk = engine.log_likelihood(statistic)
                statistics[node_id] = statistic
                scores[node_id] = leaf_score(len(members), llk, self.alpha)
                continue

            left, right = hierarchy.children(node_id)
            statistic = statistics.pop(left) + statistics.pop(right)
            statistics[node_id] = statistic
            scores[node_id] = merge_score(scores[left], scores[right],
                                          engine.log_likelihood(statistic), self.alpha)

        return hierarchy.with_scores(scores)

    def cut(self, hierarchy: Hierarchy, threshold: Optional[float] = None) -> Dict[str, int]:
        """
        Cut a scored hierarchy top-down.

        Args:
            hierarchy: Hierarchy carrying NodeScores
            threshold: Log r_k threshold; defaults to the optimizer's threshold

        Returns:
            Mapping from label to cluster id, ids numbered in order of discovery
        """
        if not hierarchy.is_scored:
            raise HierarchyStructureError("Hierarchy must be scored before it can be cut")
        if threshold is None:
            threshold = self.threshold

        partition: Dict[str, int] = {}
        n_clusters = 0
        stack = [hierarchy.root]
        while stack:
            node_id = stack.pop()
            if hierarchy.is_leaf(node_id) or hierarchy.score(node_id).log_rk >= threshold:
                n_clusters += 1
                for label in hierarchy.leaf_members(node_id):
                    partition[label] = n_clusters
            else:
                left, right = hierarchy.children(node_id)
                stack.append(right)
                stack.append(left)

        self.logger.debug(f"Cut at log rk >= {threshold:.4f} gives {n_clusters} clusters")
        return partition

    def partition_log_likelihood(self, matrix: SparseAlleleMatrix, partition: Mapping[str, int]) -> float:
        """Sum of the one-cluster log-likelihoods of every cluster in ``partition``."""
        if set(partition) != set(matrix.labels):
            raise InputValidationError("Partition labels do not match the allele matrix")
        engine = LikelihoodEngine(matrix)
        index = matrix.label_index()
        return sum(engine.cluster_log_likelihood([index[label] for label in members])
                   for members in clusters_from_partition(partition).values())
