"""
Tests for prior optimisation.
"""

import math
from unittest.mock import patch

import numpy as np
import pytest

from fastbhc.errors import ConfigurationError
from fastbhc.prior import PRIOR_MODES, SCALE_INTERVAL, PriorOptimizer, _evaluate_prior_worker
from fastbhc.sparse_data import SparseAlleleMatrix, population_prior, symmetric_prior


def clustered_matrix():
    sequences = [
        "AAAAAAAAAA", "AAAAAAAAAC", "AAAAAAAACA",
        "TTTTTAAAAA", "TTTTTAAAAG",
        "TTTTTTTTTT",
    ]
    return SparseAlleleMatrix.from_sequences(sequences, [f"s{i}" for i in range(len(sequences))])


class TestPriorOptimizer:
    """Test suite for PriorOptimizer."""

    def test_initialization(self):
        """A five point grid with six refinement steps by default."""
        optimizer = PriorOptimizer()
        assert optimizer.n_grid == 5
        assert optimizer.n_refine == 6

    @pytest.mark.parametrize("kwargs", [{"n_grid": 1}, {"n_refine": -1}])
    def test_invalid_parameters(self, kwargs):
        """The grid needs two points and refinement cannot be negative."""
        with pytest.raises(ConfigurationError):
            PriorOptimizer(**kwargs)

    def test_unknown_mode(self):
        """Only the four prior modes are accepted."""
        with pytest.raises(ConfigurationError):
            PriorOptimizer(num_threads=0, show_progress=False).apply(clustered_matrix(), "baps")

    def test_fixed_symmetric(self):
        """The fixed symmetric mode uses 1/A pseudo-counts without any search."""
        matrix = clustered_matrix()
        optimizer = PriorOptimizer(num_threads=0, show_progress=False)
        with patch("fastbhc.prior._evaluate_prior_worker") as mock_evaluate:
            updated, result = optimizer.apply(matrix, "fixed-symmetric")
            mock_evaluate.assert_not_called()

        np.testing.assert_allclose(updated.prior, symmetric_prior(matrix))
        assert result.mixing == 0.0
        assert result.scale == 1.0

    def test_fixed_population(self):
        """The fixed population mode uses the allele-frequency prior."""
        matrix = clustered_matrix()
        updated, result = PriorOptimizer(num_threads=0, show_progress=False).apply(matrix, "fixed-population")

        np.testing.assert_allclose(updated.prior, population_prior(matrix))
        assert result.mixing == 1.0

    def test_degenerate_data_keeps_symmetric_prior(self):
        """Without variant sites every prior ties and the symmetric one is kept."""
        matrix = SparseAlleleMatrix.from_sequences(["ACGTACGT"] * 4, ["a", "b", "c", "d"])
        optimizer = PriorOptimizer(num_threads=0, show_progress=False)

        result = optimizer.optimise_mixing(matrix)

        assert matrix.n_sites == 0
        assert result.parameter == 0.0
        assert result.mixing == 0.0
        assert len({value for _, value in result.evaluations}) == 1

    def test_degenerate_data_keeps_unit_scale(self):
        """Without variant sites every scale ties and the unscaled prior is kept."""
        matrix = SparseAlleleMatrix.from_sequences(["ACGTACGT"] * 4, ["a", "b", "c", "d"])
        optimizer = PriorOptimizer(num_threads=0, show_progress=False)

        updated, result = optimizer.apply(matrix, "optimize-symmetric")

        assert result.scale == 1.0
        assert result.evaluations[0][0] == 1.0
        assert len({value for _, value in result.evaluations}) == 1
        np.testing.assert_allclose(updated.prior, symmetric_prior(matrix))

    def test_scale_grid_starts_at_unit_scale(self):
        """The unscaled prior is evaluated first even though it is not a grid point."""
        matrix = clustered_matrix()
        result = PriorOptimizer(n_refine=0, num_threads=0, show_progress=False).optimise_scale(matrix)

        scales = [parameter for parameter, _ in result.evaluations]
        assert len(scales) == 6
        assert scales[0] == 1.0
        assert scales.count(1.0) == 1

    def test_linkage_seed_passed_to_builds(self):
        """Seeding settings reach every hierarchy build of the search."""
        matrix = clustered_matrix()
        optimizer = PriorOptimizer(n_refine=0, linkage_seed=True, num_threads=0, show_progress=False)

        with patch("fastbhc.prior._evaluate_prior_worker", return_value=0.0) as mock_evaluate:
            optimizer.optimise_mixing(matrix)

        assert mock_evaluate.call_count == 5
        for call in mock_evaluate.call_args_list:
            assert call.args[4:] == (None, True)

    def test_optimise_mixing_returns_best_evaluation(self):
        """The chosen weight has the highest marginal likelihood seen."""
        matrix = clustered_matrix()
        optimizer = PriorOptimizer(n_refine=3, num_threads=0, show_progress=False)

        result = optimizer.optimise_mixing(matrix)

        assert 0.0 <= result.parameter <= 1.0
        assert result.log_likelihood == pytest.approx(max(value for _, value in result.evaluations))
        assert 5 <= len(result.evaluations) <= 5 + 3 + 1
        expected = _evaluate_prior_worker(matrix, result.mixing, result.scale, 1.0, None)
        assert result.log_likelihood == pytest.approx(expected)

    def test_grid_evaluated_from_conservative_end(self):
        """The grid is evaluated starting at the symmetric prior."""
        matrix = clustered_matrix()
        result = PriorOptimizer(n_refine=0, num_threads=0, show_progress=False).optimise_mixing(matrix)

        assert [parameter for parameter, _ in result.evaluations] == [0.0, 0.25, 0.5, 0.75, 1.0]

    def test_optimise_scale_within_interval(self):
        """The concentration scale stays within its search interval."""
        matrix = clustered_matrix()
        optimizer = PriorOptimizer(n_refine=2, num_threads=0, show_progress=False)

        updated, result = optimizer.apply(matrix, "optimize-symmetric")

        low, high = SCALE_INTERVAL
        assert low * (1 - 1e-9) <= result.scale <= high * (1 + 1e-9)
        assert result.mixing == 0.0
        np.testing.assert_allclose(updated.prior, result.scale * symmetric_prior(matrix))

    def test_optimize_population_mode(self):
        """optimize-population searches the mixing weight."""
        matrix = clustered_matrix()
        updated, result = PriorOptimizer(n_refine=1, num_threads=0, show_progress=False).apply(
            matrix, "optimize-population")

        assert result.mode == "optimize-population"
        expected = (1 - result.mixing) * symmetric_prior(matrix) + result.mixing * population_prior(matrix)
        np.testing.assert_allclose(updated.prior, expected)

    def test_parallel_grid_matches_serial(self):
        """Worker processes give the same grid values as in-process evaluation."""
        matrix = clustered_matrix()
        serial = PriorOptimizer(n_refine=0, num_threads=0, show_progress=False).optimise_mixing(matrix)
        parallel = PriorOptimizer(n_refine=0, num_threads=2, show_progress=False).optimise_mixing(matrix)

        assert [p for p, _ in serial.evaluations] == [p for p, _ in parallel.evaluations]
        for (_, a), (_, b) in zip(serial.evaluations, parallel.evaluations):
            assert a == pytest.approx(b)

    def test_modes(self):
        """The four modes are exposed."""
        assert set(PRIOR_MODES) == {"fixed-symmetric", "fixed-population",
                                    "optimize-symmetric", "optimize-population"}
        assert math.isclose(SCALE_INTERVAL[0], 5e-4)
