"""
Dirichlet-multinomial likelihood for fastbhc.

Each site is an independent categorical variable with a Dirichlet prior, so the
marginal likelihood of a cluster depends only on its per-site allele counts.
Counts are additive over disjoint sets of sequences, which lets the clustering
code sum child statistics instead of re-reading the alignment.
"""

import math
from dataclasses import dataclass
from typing import Dict, Sequence

import numpy as np
from scipy import sparse
from scipy.special import gammaln

from .errors import NumericalError
from .sparse_data import SparseAlleleMatrix


@dataclass(frozen=True)
class ClusterStatistic:
    """
    Sufficient statistic of a set of sequences.

    Attributes:
        size: Number of sequences in the set
        counts: CSR matrix (sites x A) of non-consensus allele counts; the
            consensus count at a site is ``size`` minus the row total
    """
    size: int
    counts: sparse.csr_matrix

    def __add__(self, other: "ClusterStatistic") -> "ClusterStatistic":
        return ClusterStatistic(self.size + other.size, self.counts + other.counts)

    @property
    def nnz(self) -> int:
        return self.counts.nnz

    @classmethod
    def empty(cls, n_sites: int, alphabet_size: int) -> "ClusterStatistic":
        return cls(0, sparse.csr_matrix((n_sites, alphabet_size), dtype=np.int64))


@dataclass(frozen=True)
class NodeScore:
    """
    Bayesian hierarchical clustering quantities for one hierarchy node.

    Attributes:
        size: Number of sequences below the node
        log_likelihood: log p(D|H1), all sequences drawn from one cluster
        log_tree_likelihood: log p(D|T), marginalised over partitions consistent with the subtree
        log_d: Log of the Dirichlet process normaliser d_k
        log_rk: Log posterior probability that the node's sequences form one cluster
    """
    size: int
    log_likelihood: float
    log_tree_likelihood: float
    log_d: float
    log_rk: float

    @property
    def rk(self) -> float:
        return math.exp(self.log_rk)


def leaf_score(size: int, log_likelihood: float, alpha: float = 1.0) -> NodeScore:
    """Score a leaf holding ``size`` sequences; a leaf is always one cluster."""
    log_d = math.log(alpha) + float(gammaln(size))
    return NodeScore(size=size,
                     log_likelihood=log_likelihood,
                     log_tree_likelihood=log_likelihood,
                     log_d=log_d,
                     log_rk=0.0)


def merge_score(left: NodeScore, right: NodeScore, merged_log_likelihood: float,
                alpha: float = 1.0) -> NodeScore:
    """
    Score the node obtained by merging two subtrees.

    The Dirichlet process weight pi_k = alpha * Gamma(n_k) / d_k, with
    d_k = alpha * Gamma(n_k) + d_i * d_j, is the prior probability that the
    merged sequences form a single cluster. Then

        p(D_k|T_k) = pi_k p(D_k|H1) + (1 - pi_k) p(D_i|T_i) p(D_j|T_j)
        r_k = pi_k p(D_k|H1) / p(D_k|T_k)

    All arithmetic is carried out in log space.
    """
    size = left.size + right.size
    log_single = math.log(alpha) + float(gammaln(size))
    log_split = left.log_d + right.log_d
    log_d = float(np.logaddexp(log_single, log_split))

    log_pi = log_single - log_d
    log_one_minus_pi = log_split - log_d

    log_merged = log_pi + merged_log_likelihood
    log_separate = log_one_minus_pi + left.log_tree_likelihood + right.log_tree_likelihood
    log_tree_likelihood = float(np.logaddexp(log_merged, log_separate))
    log_rk = min(0.0, log_merged - log_tree_likelihood)

    if not (math.isfinite(log_tree_likelihood) and math.isfinite(log_rk)):
        raise NumericalError(
            f"Non-finite merge score for clusters of size {left.size} and {right.size}: "
            f"log p(D|T)={log_tree_likelihood}, log rk={log_rk}"
        )

    return NodeScore(size=size,
                     log_likelihood=merged_log_likelihood,
                     log_tree_likelihood=log_tree_likelihood,
                     log_d=log_d,
                     log_rk=log_rk)


class LikelihoodEngine:
    """
    Marginal log-likelihood of clusters under a per-site Dirichlet-multinomial model.

    For a site with prior pseudo-counts gamma (total G) and allele counts c
    (total N) the marginal likelihood is

        lgamma(G) - lgamma(G + N) + sum_a [lgamma(gamma_a + c_a) - lgamma(gamma_a)]

    The sum over all sites for a cluster whose members all carry the consensus
    allele depends only on N and is cached per cluster size. Sites where the
    cluster holds non-consensus alleles are corrected individually, so the cost
    of an evaluation grows with the number of non-consensus counts.
    """

    def __init__(self, matrix: SparseAlleleMatrix):
        self.matrix = matrix
        self.n_sites = matrix.n_sites
        self.alphabet_size = matrix.alphabet_size
        self.prior = matrix.prior
        self.site_mass = matrix.prior.sum(axis=1)
        self.consensus_prior = matrix.prior[np.arange(matrix.n_sites), matrix.consensus - 1]
        self._baseline_cache: Dict[int, float] = {0: 0.0}
        self._log_consensus_share = float(np.sum(np.log(self.consensus_prior / self.site_mass)))

    def baseline(self, size: int) -> float:
        """Log-likelihood of ``size`` sequences that carry the consensus allele at every site."""
        if size not in self._baseline_cache:
            self._baseline_cache[size] = float(np.sum(
                gammaln(self.site_mass) - gammaln(self.site_mass + size)
                + gammaln(self.consensus_prior + size) - gammaln(self.consensus_prior)
            ))
        return self._baseline_cache[size]

    def leaf_statistic(self, index: int) -> ClusterStatistic:
        """Sufficient statistic of the single sequence in column ``index``."""
        snp = self.matrix.snp_matrix
        start, end = snp.indptr[index], snp.indptr[index + 1]
        rows = snp.indices[start:end]
        codes = snp.data[start:end].astype(np.int64)
        counts = sparse.csr_matrix(
            (np.ones(len(rows), dtype=np.int64), (rows, codes - 1)),
            shape=(self.n_sites, self.alphabet_size),
        )
        return ClusterStatistic(1, counts)

    def statistic(self, indices: Sequence[int]) -> ClusterStatistic:
        """Sufficient statistic of the sequences in the given columns."""
        indices = list(indices)
        if not indices:
            return ClusterStatistic.empty(self.n_sites, self.alphabet_size)
        sub = self.matrix.snp_matrix[:, indices].tocoo()
        counts = sparse.coo_matrix(
            (np.ones(sub.nnz, dtype=np.int64), (sub.row, sub.data.astype(np.int64) - 1)),
            shape=(self.n_sites, self.alphabet_size),
        ).tocsr()
        counts.sum_duplicates()
        return ClusterStatistic(len(indices), counts)

    def log_likelihood(self, statistic: ClusterStatistic) -> float:
        """Marginal log-likelihood of a cluster from its sufficient statistic."""
        size = statistic.size
        if size == 0:
            return 0.0

        llk = self.baseline(size)
        coo = statistic.counts.tocoo()
        if coo.nnz:
            rows = coo.row
            cols = coo.col
            values = coo.data.astype(float)

            variant_rows, inverse = np.unique(rows, return_inverse=True)
            row_totals = np.bincount(inverse, weights=values)
            consensus_prior = self.consensus_prior[variant_rows]
            llk += float(np.sum(
                gammaln(consensus_prior + size - row_totals) - gammaln(consensus_prior + size)
            ))

            allele_prior = self.prior[rows, cols]
            llk += float(np.sum(gammaln(allele_prior + values) - gammaln(allele_prior)))

        if not math.isfinite(llk):
            raise NumericalError(f"Non-finite log-likelihood for a cluster of {size} sequences")
        return llk

    def singleton_log_likelihood(self, index: int) -> float:
        """Closed form log-likelihood of a single sequence."""
        snp = self.matrix.snp_matrix
        start, end = snp.indptr[index], snp.indptr[index + 1]
        rows = snp.indices[start:end]
        codes = snp.data[start:end].astype(np.int64)
        return self._log_consensus_share + float(np.sum(
            np.log(self.prior[rows, codes - 1]) - np.log(self.consensus_prior[rows])
        ))

    def cluster_log_likelihood(self, indices: Sequence[int]) -> float:
        return self.log_likelihood(self.statistic(indices))
