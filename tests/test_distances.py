"""
Tests for pairwise SNP distances.
"""

import numpy as np
import pytest
from hypothesis import given, settings, strategies as st

from fastbhc.distances import linkage_hierarchy, linkage_matrix, linkage_seed_merges, snp_similarity_distance
from fastbhc.sparse_data import SparseAlleleMatrix


def dense_codes(matrix):
    """Full sites x sequences code table with the consensus filled in."""
    codes = matrix.snp_matrix.toarray().astype(int)
    consensus = np.repeat(matrix.consensus[:, np.newaxis], matrix.n_sequences, axis=1)
    return np.where(codes == 0, consensus, codes)


alignments = st.integers(min_value=2, max_value=8).flatmap(
    lambda n: st.lists(st.text(alphabet="ACGT-", min_size=10, max_size=10), min_size=n, max_size=n)
)


class TestSnpSimilarityDistance:
    """Test suite for the sparse pairwise distance computation."""

    def test_simple_distances(self):
        """Distances count differing variant sites."""
        matrix = SparseAlleleMatrix.from_sequences(["AAAA", "AAAC", "ACGC"], ["a", "b", "c"])
        pairwise = snp_similarity_distance(matrix)

        assert pairwise.n_variant_sites == 3
        expected = np.array([[0, 1, 3], [1, 0, 2], [3, 2, 0]])
        np.testing.assert_array_equal(pairwise.distance, expected)
        np.testing.assert_array_equal(pairwise.similarity, 3 - expected)
        assert pairwise.index("c") == 2

    @given(alignments)
    @settings(max_examples=50, deadline=None)
    def test_matches_dense_comparison(self, sequences):
        """Sparse products agree with comparing every pair of sequences directly."""
        labels = [f"s{i}" for i in range(len(sequences))]
        matrix = SparseAlleleMatrix.from_sequences(sequences, labels)
        pairwise = snp_similarity_distance(matrix)

        codes = dense_codes(matrix)
        n = len(sequences)
        for i in range(n):
            for j in range(n):
                assert pairwise.similarity[i, j] == int(np.sum(codes[:, i] == codes[:, j]))

        assert np.array_equal(pairwise.distance, pairwise.distance.T)
        assert np.all(np.diag(pairwise.distance) == 0)
        assert np.all(np.diag(pairwise.similarity) == pairwise.n_variant_sites)
        assert np.all(pairwise.similarity <= pairwise.n_variant_sites)

    def test_condensed_distance_normalised(self):
        """Condensed distances are scaled to a maximum of 1."""
        matrix = SparseAlleleMatrix.from_sequences(["AAAA", "AAAC", "ACGC"], ["a", "b", "c"])
        condensed = snp_similarity_distance(matrix).condensed_distance()

        np.testing.assert_allclose(condensed, [1 / 3, 1.0, 2 / 3])

    def test_identical_sequences(self):
        """Identical sequences have no variant sites and zero distance."""
        matrix = SparseAlleleMatrix.from_sequences(["ACGT"] * 3, ["a", "b", "c"])
        pairwise = snp_similarity_distance(matrix)

        assert pairwise.n_variant_sites == 0
        assert not pairwise.distance.any()
        assert not pairwise.condensed_distance().any()


class TestLinkage:
    """Test linkage trees over SNP distances."""

    def setup_method(self):
        sequences = ["AAAAAAAA", "AAAAAAAC", "TTTTTTTT", "TTTTTTTG", "TTTTTTGG"]
        self.matrix = SparseAlleleMatrix.from_sequences(sequences, ["a", "b", "c", "d", "e"])

    def test_linkage_matrix_shape(self):
        """scipy linkage has one row per merge."""
        assert linkage_matrix(self.matrix).shape == (4, 4)

    def test_linkage_hierarchy(self):
        """The linkage tree converts to a validated hierarchy."""
        hierarchy = linkage_hierarchy(self.matrix, method="average")

        hierarchy.validate()
        assert hierarchy.labels == ["a", "b", "c", "d", "e"]
        left, right = hierarchy.children(hierarchy.root)
        assert {frozenset(hierarchy.leaf_members(left)), frozenset(hierarchy.leaf_members(right))} == {
            frozenset({"a", "b"}), frozenset({"c", "d", "e"})
        }

    def test_single_sequence_hierarchy(self):
        """One sequence gives a one-leaf hierarchy."""
        matrix = SparseAlleleMatrix.from_sequences(["ACGT"], ["only"])
        hierarchy = linkage_hierarchy(matrix)
        assert hierarchy.n_leaves == 1
        assert hierarchy.root == 0

    def test_linkage_seed_merges(self):
        """Within-group merges rebuild each group's subtree and nothing across groups."""
        merges = linkage_seed_merges(self.matrix, 2)
        assert len(merges) == 3

        n = self.matrix.n_sequences
        members = {i: {label} for i, label in enumerate(self.matrix.labels)}
        for m, (left, right) in enumerate(merges):
            assert left < right < n + m
            members[n + m] = members.pop(left) | members.pop(right)
        assert sorted(sorted(group) for group in members.values()) == [["a", "b"], ["c", "d", "e"]]

    def test_single_group_keeps_whole_tree(self):
        """Asking for one group keeps every linkage merge."""
        merges = linkage_seed_merges(self.matrix, 1)
        assert len(merges) == self.matrix.n_sequences - 1
        assert merges[-1][1] == 2 * self.matrix.n_sequences - 3

    def test_one_group_per_sequence(self):
        """As many groups as sequences leaves nothing to merge."""
        assert linkage_seed_merges(self.matrix, self.matrix.n_sequences) == []
