"""
Sparse allele matrix for fastbhc.

Aligned sequences are stored as a sites x sequences sparse matrix in which an
implicit zero means "carries the consensus allele" and a stored value is the
allele code (1..A) of a non-consensus allele. Only variant sites are kept when
the matrix is built from sequences, so memory scales with the number of SNPs
rather than the alignment size.
"""

import logging
from collections import Counter
from typing import Optional, Sequence

import numpy as np
from scipy import sparse

from .errors import InputValidationError

logger = logging.getLogger(__name__)

DEFAULT_ALPHABET = "ACGT-"
GAP_CHARACTER = "-"


class SparseAlleleMatrix:
    """
    Per-site allele codes for a set of aligned sequences.

    Attributes:
        snp_matrix: CSC matrix (sites x sequences) of non-consensus allele codes
        consensus: Consensus allele code (1..A) for each site
        prior: Dirichlet pseudo-counts (sites x A), column a-1 holds code a
        labels: Sequence labels, one per column
        alphabet: Alphabet string, character a-1 is allele code a
        positions: Alignment column of each site
    """

    def __init__(self,
                 snp_matrix,
                 consensus: Sequence[int],
                 labels: Sequence[str],
                 prior: Optional[np.ndarray] = None,
                 alphabet: str = DEFAULT_ALPHABET,
                 positions: Optional[Sequence[int]] = None):
        if not sparse.issparse(snp_matrix):
            raise InputValidationError("snp_matrix must be a scipy sparse matrix")

        self.alphabet = alphabet
        self.snp_matrix = sparse.csc_matrix(snp_matrix, dtype=np.int8)
        self.snp_matrix.eliminate_zeros()
        self.snp_matrix.sort_indices()
        self.consensus = np.asarray(consensus)
        self.labels = list(labels)
        n_sites = self.snp_matrix.shape[0]
        if positions is None:
            positions = np.arange(n_sites)
        self.positions = np.asarray(positions, dtype=np.int64)

        self._validate_structure()
        self.consensus = self.consensus.astype(np.int64)

        if prior is None:
            prior = np.full((n_sites, len(alphabet)), 1.0 / len(alphabet))
        self.prior = self._validate_prior(prior)

    @property
    def n_sites(self) -> int:
        return self.snp_matrix.shape[0]

    @property
    def n_sequences(self) -> int:
        return self.snp_matrix.shape[1]

    @property
    def alphabet_size(self) -> int:
        return len(self.alphabet)

    def _validate_structure(self):
        n_sites, n_sequences = self.snp_matrix.shape
        alphabet_size = len(self.alphabet)

        if alphabet_size < 2:
            raise InputValidationError("Alphabet must contain at least two alleles")
        if len(set(self.alphabet)) != alphabet_size:
            raise InputValidationError(f"Alphabet contains repeated characters: {self.alphabet!r}")
        if len(self.labels) != n_sequences:
            raise InputValidationError(
                f"Got {len(self.labels)} labels for {n_sequences} sequences"
            )
        if len(set(self.labels)) != len(self.labels):
            duplicates = sorted(label for label, count in Counter(self.labels).items() if count > 1)
            raise InputValidationError(f"Duplicate sequence labels: {duplicates[:10]}")
        if self.consensus.shape != (n_sites,):
            raise InputValidationError(
                f"Consensus has shape {self.consensus.shape}, expected ({n_sites},)"
            )
        if n_sites and not np.issubdtype(self.consensus.dtype, np.integer):
            raise InputValidationError("Consensus codes must be integers")
        if n_sites and (self.consensus.min() < 1 or self.consensus.max() > alphabet_size):
            raise InputValidationError(f"Consensus codes must lie in 1..{alphabet_size}")
        if self.positions.shape != (n_sites,):
            raise InputValidationError("positions must have one entry per site")

        codes = self.snp_matrix.data
        if codes.size:
            if codes.min() < 1 or codes.max() > alphabet_size:
                raise InputValidationError(f"Stored allele codes must lie in 1..{alphabet_size}")
            rows = self.snp_matrix.indices
            clashes = codes == self.consensus[rows]
            if np.any(clashes):
                site = int(rows[np.argmax(clashes)])
                raise InputValidationError(
                    f"Site {site} stores its consensus allele explicitly; consensus must be implicit"
                )

    def _validate_prior(self, prior) -> np.ndarray:
        try:
            prior = np.asarray(prior, dtype=float)
        except (TypeError, ValueError) as e:
            raise InputValidationError(f"Prior must be numeric: {e}")
        expected = (self.n_sites, self.alphabet_size)
        if prior.shape != expected:
            raise InputValidationError(f"Prior has shape {prior.shape}, expected {expected}")
        if not np.all(np.isfinite(prior)) or np.any(prior <= 0):
            raise InputValidationError("Prior pseudo-counts must be finite and strictly positive")
        return prior

    @classmethod
    def from_sequences(cls,
                       sequences: Sequence[str],
                       labels: Sequence[str],
                       alphabet: str = DEFAULT_ALPHABET,
                       variant_only: bool = True) -> "SparseAlleleMatrix":
        """
        Build a matrix from aligned sequences.

        Characters outside the alphabet are read as the gap character. The
        consensus is the most frequent allele at each site, ties going to the
        lowest code.

        Args:
            sequences: Aligned sequences of equal length
            labels: One label per sequence
            alphabet: Allele alphabet
            variant_only: Drop sites where every sequence carries the consensus

        Returns:
            SparseAlleleMatrix with the symmetric prior
        """
        if len(sequences) == 0:
            raise InputValidationError("No sequences provided")
        if len(sequences) != len(labels):
            raise InputValidationError(f"Got {len(labels)} labels for {len(sequences)} sequences")
        lengths = {len(seq) for seq in sequences}
        if len(lengths) != 1:
            raise InputValidationError(f"Sequences are not aligned, found lengths {sorted(lengths)}")

        lookup = np.zeros(256, dtype=np.int8)
        if GAP_CHARACTER in alphabet:
            lookup[:] = alphabet.index(GAP_CHARACTER) + 1
        for code, char in enumerate(alphabet, 1):
            lookup[ord(char.upper())] = code
            lookup[ord(char.lower())] = code

        raw = np.frombuffer("".join(sequences).encode("ascii", errors="replace"), dtype=np.uint8)
        codes = lookup[raw].reshape(len(sequences), -1)
        if np.any(codes == 0):
            raise InputValidationError(
                f"Sequences contain characters outside the alphabet {alphabet!r} and it has no gap character"
            )

        alphabet_size = len(alphabet)
        n_columns = codes.shape[1]
        counts = np.zeros((n_columns, alphabet_size), dtype=np.int64)
        for code in range(1, alphabet_size + 1):
            counts[:, code - 1] = (codes == code).sum(axis=0)
        consensus = np.argmax(counts, axis=1) + 1

        differs = codes != consensus[np.newaxis, :]
        if variant_only:
            positions = np.flatnonzero(differs.any(axis=0))
        else:
            positions = np.arange(n_columns)
        codes = codes[:, positions]
        differs = differs[:, positions]
        consensus = consensus[positions]

        seq_idx, site_idx = np.nonzero(differs)
        snp_matrix = sparse.csc_matrix(
            (codes[seq_idx, site_idx], (site_idx, seq_idx)),
            shape=(len(positions), len(sequences)),
            dtype=np.int8,
        )
        logger.debug(f"Encoded {len(sequences)} sequences: {len(positions)} of {n_columns} sites retained, "
                     f"{snp_matrix.nnz} non-consensus entries")

        return cls(snp_matrix, consensus, labels, alphabet=alphabet, positions=positions)

    def with_prior(self, prior: np.ndarray) -> "SparseAlleleMatrix":
        """Return a copy of this matrix that uses a different prior table."""
        return SparseAlleleMatrix(self.snp_matrix, self.consensus, self.labels,
                                  prior=prior, alphabet=self.alphabet, positions=self.positions)

    def subset(self, labels: Sequence[str]) -> "SparseAlleleMatrix":
        """Restrict the matrix to the given sequences, keeping every site and the prior."""
        index = {label: i for i, label in enumerate(self.labels)}
        missing = [label for label in labels if label not in index]
        if missing:
            raise InputValidationError(f"Unknown sequence labels: {missing[:10]}")
        columns = [index[label] for label in labels]
        return SparseAlleleMatrix(self.snp_matrix[:, columns], self.consensus, list(labels),
                                  prior=self.prior, alphabet=self.alphabet, positions=self.positions)

    def label_index(self) -> dict:
        return {label: i for i, label in enumerate(self.labels)}

    def variant_sites(self) -> np.ndarray:
        """Indices of sites where at least one sequence carries a non-consensus allele."""
        return np.unique(self.snp_matrix.indices)

    def allele_indicator(self, code: int):
        """Boolean CSC matrix marking the (site, sequence) cells that carry allele ``code``."""
        indicator = self.snp_matrix == code
        return sparse.csc_matrix(indicator, dtype=np.int32)

    def allele_counts(self) -> np.ndarray:
        """Per-site allele counts (sites x A), consensus counts included."""
        counts = np.zeros((self.n_sites, self.alphabet_size), dtype=np.int64)
        coo = self.snp_matrix.tocoo()
        np.add.at(counts, (coo.row, coo.data.astype(np.int64) - 1), 1)
        non_consensus = counts.sum(axis=1)
        counts[np.arange(self.n_sites), self.consensus - 1] += self.n_sequences - non_consensus
        return counts

    def __repr__(self):
        return (f"SparseAlleleMatrix(sites={self.n_sites}, sequences={self.n_sequences}, "
                f"nnz={self.snp_matrix.nnz}, alphabet={self.alphabet!r})")


def symmetric_prior(matrix: SparseAlleleMatrix) -> np.ndarray:
    """Uniform pseudo-counts of 1/A per allele, giving a prior mass of 1 at every site."""
    return np.full((matrix.n_sites, matrix.alphabet_size), 1.0 / matrix.alphabet_size)


def population_prior(matrix: SparseAlleleMatrix) -> np.ndarray:
    """Pseudo-counts proportional to the observed allele frequencies, smoothed to stay positive."""
    counts = matrix.allele_counts().astype(float)
    return (counts + 1.0 / matrix.alphabet_size) / (matrix.n_sequences + 1.0)


def mixed_prior(matrix: SparseAlleleMatrix, mixing: float, scale: float = 1.0) -> np.ndarray:
    """
    Convex combination of the symmetric and population priors.

    Args:
        matrix: Allele matrix the prior is built for
        mixing: Weight of the population prior (0 = symmetric, 1 = population)
        scale: Multiplier applied to the combined pseudo-counts

    Returns:
        Prior table (sites x A)
    """
    if not 0.0 <= mixing <= 1.0:
        raise InputValidationError(f"Mixing parameter must lie in [0, 1], got {mixing}")
    if not scale > 0:
        raise InputValidationError(f"Prior scale must be positive, got {scale}")
    if mixing == 0.0:
        prior = symmetric_prior(matrix)
    elif mixing == 1.0:
        prior = population_prior(matrix)
    else:
        prior = (1.0 - mixing) * symmetric_prior(matrix) + mixing * population_prior(matrix)
    return scale * prior

