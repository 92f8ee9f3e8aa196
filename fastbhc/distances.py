"""
Pairwise SNP similarity and distance for fastbhc.

Distances are counted over variant sites only: a site where every sequence
carries the consensus allele adds nothing to any pairwise distance. Matches
are accumulated with sparse matrix products, one per allele code, so the work
scales with the number of non-consensus entries.
"""

import logging
from dataclasses import dataclass
from typing import List, Tuple

import numpy as np
from scipy import sparse
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform

from .hierarchy import Hierarchy
from .sparse_data import SparseAlleleMatrix

logger = logging.getLogger(__name__)


@dataclass
class PairwiseMatrices:
    """Symmetric similarity and distance matrices indexed by sequence label."""
    labels: List[str]
    similarity: np.ndarray
    distance: np.ndarray
    n_variant_sites: int

    def condensed_distance(self, normalise: bool = True) -> np.ndarray:
        """Condensed distance vector for scipy linkage, optionally scaled to [0, 1]."""
        distance = self.distance.astype(float)
        if normalise:
            max_distance = distance.max() if distance.size else 0.0
            if max_distance > 0:
                distance = distance / max_distance
        return squareform(distance, checks=False)

    def index(self, label: str) -> int:
        return self.labels.index(label)


def snp_similarity_distance(matrix: SparseAlleleMatrix) -> PairwiseMatrices:
    """
    Count, for every pair of sequences, the variant sites where they agree and differ.

    Two sequences agree at a site when both carry the consensus or both carry
    the same non-consensus allele. With B the indicator of non-consensus cells
    and z its column totals, both-consensus agreements are V - z_i - z_j + (B'B)_ij
    over the V variant sites, and same-allele agreements are sum_a (M_a' M_a)_ij
    with M_a the indicator of allele a.

    Args:
        matrix: Sparse allele matrix

    Returns:
        PairwiseMatrices with similarity (diagonal V) and distance (diagonal 0)
    """
    snp = matrix.snp_matrix
    n = matrix.n_sequences
    n_variant = len(matrix.variant_sites())

    nonzero = sparse.csc_matrix((np.ones(snp.nnz, dtype=np.int64), snp.indices, snp.indptr), shape=snp.shape)
    both_non_consensus = (nonzero.T @ nonzero).toarray()
    per_sequence = np.asarray(nonzero.sum(axis=0)).ravel()

    same_allele = np.zeros((n, n), dtype=np.int64)
    for code in np.unique(snp.data):
        indicator = matrix.allele_indicator(int(code)).astype(np.int64)
        same_allele += (indicator.T @ indicator).toarray()

    both_consensus = n_variant - per_sequence[:, np.newaxis] - per_sequence[np.newaxis, :] + both_non_consensus
    similarity = both_consensus + same_allele
    distance = n_variant - similarity

    logger.debug(f"Computed pairwise SNP distances for {n} sequences over {n_variant} variant sites")
    return PairwiseMatrices(labels=list(matrix.labels),
                            similarity=similarity,
                            distance=distance,
                            n_variant_sites=n_variant)


def linkage_matrix(matrix: SparseAlleleMatrix, method: str = "ward") -> np.ndarray:
    """scipy linkage over SNP distances scaled by the largest distance."""
    pairwise = snp_similarity_distance(matrix)
    return linkage(pairwise.condensed_distance(), method=method)


def linkage_hierarchy(matrix: SparseAlleleMatrix, method: str = "ward") -> Hierarchy:
    """Hierarchy built by scipy linkage over SNP distances."""
    if matrix.n_sequences == 1:
        return Hierarchy(leaves=((matrix.labels[0],),))
    return Hierarchy.from_linkage(linkage_matrix(matrix, method), matrix.labels)


def linkage_seed_merges(matrix: SparseAlleleMatrix, n_clusters: int,
                        method: str = "ward") -> List[Tuple[int, int]]:
    """
    Merges of the linkage tree that stay inside one of ``n_clusters`` flat groups.

    The groups are cut from the tree with ``fcluster(maxclust)``. Leaves are
    the matrix columns 0..n-1 and merge ``m`` of the result creates node
    ``n + m``, so the merges describe one binary subtree per group, ready to
    be prepended to a hierarchy over single sequences.
    """
    n = matrix.n_sequences
    if n <= 1:
        return []
    Z = linkage_matrix(matrix, method)
    assignments = fcluster(Z, t=n_clusters, criterion="maxclust")

    group_of = {i: int(assignments[i]) for i in range(n)}
    node_ids = {i: i for i in range(n)}
    merges: List[Tuple[int, int]] = []
    for row, (left, right) in enumerate(Z[:, :2].astype(int)):
        left, right = int(left), int(right)
        group = group_of[left]
        if group is not None and group == group_of[right]:
            node_ids[n + row] = n + len(merges)
            merges.append(tuple(sorted((node_ids[left], node_ids[right]))))
        else:
            group = None
        group_of[n + row] = group

    logger.debug(f"Linkage seeding: {n - len(merges)} groups from {len(merges)} within-group merges")
    return merges
