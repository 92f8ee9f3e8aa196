"""
fastbhc: Fast Bayesian Hierarchical Clustering

A Python package for clustering aligned sequences with Bayesian hierarchical
clustering over a sparse representation of their SNPs, with empirical Bayes
prior selection and nested multi-resolution partitions.
"""

__version__ = "0.1.0"

from .core import BayesianHierarchicalClustering, default_initial_clusters
from .distances import PairwiseMatrices, linkage_hierarchy, snp_similarity_distance
from .errors import (
    ConfigurationError,
    FastBHCError,
    HierarchyStructureError,
    InputValidationError,
    NumericalError
)
from .hierarchy import Hierarchy, hierarchy_from_phylo
from .likelihood import ClusterStatistic, LikelihoodEngine, NodeScore
from .multires import MultiResolutionClustering
from .partition import TreePartitionOptimizer
from .prior import PriorOptimizer, PriorSearchResult
from .sparse_data import SparseAlleleMatrix, mixed_prior, population_prior, symmetric_prior
from .utils import load_alignment, load_phylogeny, save_partitions_to_file

__all__ = [
    "BayesianHierarchicalClustering",
    "default_initial_clusters",
    "PairwiseMatrices",
    "linkage_hierarchy",
    "snp_similarity_distance",
    "ConfigurationError",
    "FastBHCError",
    "HierarchyStructureError",
    "InputValidationError",
    "NumericalError",
    "Hierarchy",
    "hierarchy_from_phylo",
    "ClusterStatistic",
    "LikelihoodEngine",
    "NodeScore",
    "MultiResolutionClustering",
    "TreePartitionOptimizer",
    "PriorOptimizer",
    "PriorSearchResult",
    "SparseAlleleMatrix",
    "mixed_prior",
    "population_prior",
    "symmetric_prior",
    "load_alignment",
    "load_phylogeny",
    "save_partitions_to_file"
]
