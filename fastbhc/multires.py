"""Multi-resolution clustering: re-cluster every cluster of the previous level."""

import logging
import os
from concurrent.futures import ProcessPoolExecutor
from typing import Dict, List, Optional

from tqdm import tqdm

from .core import BayesianHierarchicalClustering
from .errors import ConfigurationError
from .hierarchy import Hierarchy
from .partition import DEFAULT_THRESHOLD, TreePartitionOptimizer, clusters_from_partition
from .prior import PRIOR_MODES, PriorOptimizer
from .sparse_data import SparseAlleleMatrix

logger = logging.getLogger(__name__)


def _cluster_branch(matrix: SparseAlleleMatrix, settings: Dict) -> Dict[str, int]:
    """
    Cluster one branch's sequences from scratch.

    Module level so it can be sent to worker processes. ``settings`` holds the
    keyword arguments shared by every branch.
    """
    if settings["prior_mode"] is not None:
        optimizer = PriorOptimizer(alpha=settings["alpha"],
                                   initial_clusters=settings["initial_clusters"],
                                   linkage_seed=settings["linkage_seed"],
                                   num_threads=0,
                                   show_progress=False,
                                   logger=logger)
        matrix, _ = optimizer.apply(matrix, settings["prior_mode"])

    builder = BayesianHierarchicalClustering(alpha=settings["alpha"],
                                             initial_clusters=settings["initial_clusters"],
                                             linkage_seed=settings["linkage_seed"],
                                             linkage_method=settings["linkage_method"],
                                             show_progress=False,
                                             logger=logger)
    hierarchy = builder.build(matrix)
    cutter = TreePartitionOptimizer(alpha=settings["alpha"], threshold=settings["threshold"],
                                    logger=logger)
    partition = cutter.cut(hierarchy)
    return {label: partition[label] for label in matrix.labels}


class MultiResolutionClustering:
    """
    Nested partitions at several resolutions.

    Level 1 partitions all sequences. Each later level re-runs BHC and the
    r_k cut on every multi-member cluster of the level above; singleton
    clusters carry over unchanged. Branches are independent and run in worker
    processes when more than one worker is available.
    """

    def __init__(self,
                 n_levels: int = 2,
                 alpha: float = 1.0,
                 threshold: float = DEFAULT_THRESHOLD,
                 initial_clusters: Optional[int] = None,
                 linkage_seed: bool = False,
                 linkage_method: str = "ward",
                 prior_mode: Optional[str] = None,
                 num_threads: Optional[int] = None,
                 show_progress: bool = True,
                 logger: Optional[logging.Logger] = None):
        """
        Args:
            n_levels: Number of partition levels to produce (positive)
            alpha: Dirichlet process concentration parameter
            threshold: Log r_k cut threshold
            initial_clusters: Fixed linkage seed count for every BHC build
            linkage_seed: When initial_clusters is None, seed each build from its own size
            linkage_method: scipy linkage method used for seeding
            prior_mode: If set, choose the prior again on every branch before re-clustering
            num_threads: Worker processes for branches (default: auto-detect, 0/1: in-process)
            show_progress: If True, show progress bars
            logger: Optional logger instance for output; uses default logging if None
        """
        if n_levels < 1:
            raise ConfigurationError(f"Number of levels must be positive, got {n_levels}")
        if prior_mode is not None and prior_mode not in PRIOR_MODES:
            raise ConfigurationError(f"Unknown prior mode '{prior_mode}'")
        self.n_levels = n_levels
        self.alpha = alpha
        self.threshold = threshold
        self.initial_clusters = initial_clusters
        self.linkage_seed = linkage_seed
        self.linkage_method = linkage_method
        self.prior_mode = prior_mode
        self.num_threads = num_threads
        self.show_progress = show_progress
        self.logger = logger or logging.getLogger(__name__)

    def _settings(self) -> Dict:
        return {
            "alpha": self.alpha,
            "threshold": self.threshold,
            "initial_clusters": self.initial_clusters,
            "linkage_seed": self.linkage_seed,
            "linkage_method": self.linkage_method,
            "prior_mode": self.prior_mode,
        }

    def cluster(self, matrix: SparseAlleleMatrix,
                hierarchy: Optional[Hierarchy] = None) -> List[Dict[str, int]]:
        """
        Produce one partition per level.

        Args:
            matrix: Sparse allele matrix (with the prior to use at level 1)
            hierarchy: Optional hierarchy to cut for level 1 instead of building one

        Returns:
            List of partitions (label -> cluster id), shallowest first
        """
        cutter = TreePartitionOptimizer(alpha=self.alpha, threshold=self.threshold, logger=self.logger)
        if hierarchy is None:
            builder = BayesianHierarchicalClustering(alpha=self.alpha,
                                                     initial_clusters=self.initial_clusters,
                                                     linkage_seed=self.linkage_seed,
                                                     linkage_method=self.linkage_method,
                                                     show_progress=self.show_progress,
                                                     logger=self.logger)
            hierarchy = builder.build(matrix)
            level = cutter.cut(hierarchy)
            level = {label: level[label] for label in matrix.labels}
        else:
            level = cutter.best_partition(matrix, hierarchy)

        levels = [level]
        self.logger.info(f"Level 1: {len(set(level.values()))} clusters")

        for depth in range(2, self.n_levels + 1):
            level = self._refine_level(matrix, levels[-1])
            levels.append(level)
            self.logger.info(f"Level {depth}: {len(set(level.values()))} clusters")

        return levels

    def _refine_level(self, matrix: SparseAlleleMatrix, previous: Dict[str, int]) -> Dict[str, int]:
        """Split every multi-member cluster of ``previous`` and renumber the result."""
        clusters = clusters_from_partition(previous)
        branches = {cluster_id: members for cluster_id, members in clusters.items() if len(members) > 1}
        sub_partitions = self._run_branches(matrix, branches)

        refined: Dict[str, int] = {}
        next_id = 0
        for cluster_id in sorted(clusters):
            members = clusters[cluster_id]
            if cluster_id not in sub_partitions:
                next_id += 1
                for label in members:
                    refined[label] = next_id
                continue
            sub_partition = sub_partitions[cluster_id]
            offset = next_id
            for label in members:
                refined[label] = offset + sub_partition[label]
            next_id = offset + max(sub_partition.values())

        return {label: refined[label] for label in matrix.labels}

    def _run_branches(self, matrix: SparseAlleleMatrix,
                      branches: Dict[int, List[str]]) -> Dict[int, Dict[str, int]]:
        if not branches:
            return {}
        settings = self._settings()
        num_threads = self.num_threads
        if num_threads is None:
            num_threads = min(os.cpu_count() or 4, len(branches))

        results: Dict[int, Dict[str, int]] = {}
        if num_threads <= 1 or len(branches) == 1:
            items = list(branches.items())
            iterator = tqdm(items, desc="Re-clustering", unit=" clusters") if self.show_progress else items
            for cluster_id, members in iterator:
                results[cluster_id] = _cluster_branch(matrix.subset(members), settings)
            return results

        with ProcessPoolExecutor(max_workers=num_threads) as executor:
            futures = {cluster_id: executor.submit(_cluster_branch, matrix.subset(members), settings)
                       for cluster_id, members in branches.items()}
            iterator = tqdm(futures.items(), total=len(futures), desc="Re-clustering",
                            unit=" clusters") if self.show_progress else futures.items()
            for cluster_id, future in iterator:
                results[cluster_id] = future.result()
        return results
