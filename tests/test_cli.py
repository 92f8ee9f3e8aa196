"""
Tests for the command-line interface.
"""

import tempfile
from pathlib import Path
from unittest.mock import patch

import pytest

from fastbhc.cli import main as cli_main, setup_logging


class TestMainCLI:
    """Test suite for the fastbhc CLI."""

    def setup_method(self):
        """Set up test fixtures."""
        self.test_sequences = [
            "AAAAAAAAAAAAAAAA",
            "AAAAAAAAAAAAAAAC",
            "TTTTTTTTTTTTTTTT",
            "TTTTTTTTTTTTTTTG",
        ]

    def _create_test_fasta(self, sequences, filepath):
        """Helper to create test FASTA file."""
        with open(filepath, 'w') as f:
            for i, seq in enumerate(sequences):
                f.write(f">seq_{i}\n{seq}\n")

    def test_setup_logging_verbose(self):
        """Test logging setup with verbose mode."""
        with patch('fastbhc.cli.logging.basicConfig') as mock_config:
            setup_logging(verbose=True)
            mock_config.assert_called_once()
            args, kwargs = mock_config.call_args
            assert kwargs['level'] == 10  # logging.DEBUG

    def test_setup_logging_normal(self):
        """Test logging setup with normal mode."""
        with patch('fastbhc.cli.logging.basicConfig') as mock_config:
            setup_logging(verbose=False)
            mock_config.assert_called_once()
            args, kwargs = mock_config.call_args
            assert kwargs['level'] == 20  # logging.INFO

    @patch('sys.argv', ['fastbhc', '--help'])
    def test_cli_help_message(self):
        """Test that CLI shows help message."""
        with pytest.raises(SystemExit) as exc_info:
            cli_main()
        assert exc_info.value.code == 0

    @patch('sys.argv', ['fastbhc', 'nonexistent.fasta'])
    def test_cli_missing_input_file(self):
        """Test CLI behavior with missing input file."""
        with pytest.raises(SystemExit) as exc_info:
            cli_main()
        assert exc_info.value.code == 1

    @pytest.mark.parametrize("extra", [
        ['-l', '0'],
        ['--k-init', '0'],
        ['--alpha', '0'],
        ['--threshold', '0.5'],
    ])
    def test_invalid_configuration_exits_before_loading(self, extra):
        """Invalid parameters are reported before any input is read."""
        with patch('sys.argv', ['fastbhc', 'input.fasta'] + extra), \
             patch('fastbhc.cli.load_alignment') as mock_load:
            with pytest.raises(SystemExit) as exc_info:
                cli_main()
            assert exc_info.value.code == 1
            mock_load.assert_not_called()

    def test_unknown_prior_mode(self):
        """argparse rejects unknown prior modes."""
        with patch('sys.argv', ['fastbhc', 'input.fasta', '--prior', 'baps']):
            with pytest.raises(SystemExit) as exc_info:
                cli_main()
            assert exc_info.value.code == 2

    def test_seeding_options_are_exclusive(self):
        """--k-init and --no-linkage-seed cannot be combined."""
        with patch('sys.argv', ['fastbhc', 'input.fasta', '--k-init', '2', '--no-linkage-seed']):
            with pytest.raises(SystemExit) as exc_info:
                cli_main()
            assert exc_info.value.code == 2

    def test_cli_basic_clustering(self):
        """Test a full run writing the partition table."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            input_fasta = tmpdir / "test_input.fasta"
            output_csv = tmpdir / "clusters.csv"
            self._create_test_fasta(self.test_sequences, input_fasta)

            test_args = ['fastbhc', str(input_fasta), '-o', str(output_csv),
                         '--prior', 'fixed-symmetric', '--no-linkage-seed',
                         '-t', '0', '--quiet']
            with patch('sys.argv', test_args):
                cli_main()

            lines = output_csv.read_text().splitlines()

        assert lines[0] == "Isolates,Level 1,Level 2"
        rows = {line.split(',')[0]: line.split(',')[1:] for line in lines[1:]}
        assert set(rows) == {"seq_0", "seq_1", "seq_2", "seq_3"}
        assert rows["seq_0"][0] == rows["seq_1"][0]
        assert rows["seq_0"][0] != rows["seq_2"][0]

    def _run_default_flags(self, sequences, levels):
        """Cluster with default seeding and prior, returning the level columns by label."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            input_fasta = tmpdir / "pairs.fasta"
            output_csv = tmpdir / "pairs.csv"
            self._create_test_fasta(sequences, input_fasta)

            test_args = ['fastbhc', str(input_fasta), '-o', str(output_csv),
                         '-l', str(levels), '-t', '0', '--quiet']
            with patch('sys.argv', test_args):
                cli_main()

            lines = output_csv.read_text().splitlines()

        return {line.split(',')[0]: line.split(',')[1:] for line in lines[1:]}

    def test_default_seeding_splits_identical_pairs(self):
        """Two identical pairs seeded as one linkage group still come out as two clusters."""
        sequences = ["AAAAAAAAAAAAGG", "AAAAAAAAAAAAGG", "CCCCCCCCCCCCGG", "CCCCCCCCCCCCGG"]
        rows = self._run_default_flags(sequences, levels=3)

        for level in range(3):
            assert rows["seq_0"][level] == rows["seq_1"][level]
            assert rows["seq_2"][level] == rows["seq_3"][level]
            assert rows["seq_0"][level] != rows["seq_2"][level]

    def test_default_seeding_separates_every_pair(self):
        """Four separated pairs seeded into two linkage groups give four clusters."""
        sequences = [base * 12 for base in "AACCGGTT"]
        rows = self._run_default_flags(sequences, levels=1)

        assert len({row[0] for row in rows.values()}) == 4
        for i in range(0, 8, 2):
            assert rows[f"seq_{i}"][0] == rows[f"seq_{i + 1}"][0]

    def test_cli_default_output_path(self):
        """Without -o the table is written beside the input."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            input_fasta = tmpdir / "alignment.fasta"
            self._create_test_fasta(self.test_sequences, input_fasta)

            test_args = ['fastbhc', str(input_fasta), '--prior', 'fixed-population',
                         '--k-init', '4', '-l', '1', '-t', '0', '--quiet']
            with patch('sys.argv', test_args):
                cli_main()

            output = tmpdir / "alignment.clusters.csv"
            assert output.exists()
            assert output.read_text().splitlines()[0] == "Isolates,Level 1"

    def test_cli_with_phylogeny(self):
        """A supplied phylogeny is partitioned at level 1."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            input_fasta = tmpdir / "test_input.fasta"
            tree_path = tmpdir / "tree.nwk"
            output_csv = tmpdir / "out.csv"
            self._create_test_fasta(self.test_sequences, input_fasta)
            tree_path.write_text("((seq_0:1,seq_1:1):5,(seq_2:1,seq_3:1):5);\n")

            test_args = ['fastbhc', str(input_fasta), '-p', str(tree_path), '-o', str(output_csv),
                         '--prior', 'fixed-symmetric', '-l', '1', '-t', '0', '--quiet']
            with patch('sys.argv', test_args):
                cli_main()

            lines = output_csv.read_text().splitlines()

        assert len(lines) == 5

    def test_cli_phylogeny_label_mismatch(self):
        """A phylogeny over other labels is an error with exit status 1."""
        with tempfile.TemporaryDirectory() as tmpdir:
            tmpdir = Path(tmpdir)
            input_fasta = tmpdir / "test_input.fasta"
            tree_path = tmpdir / "tree.nwk"
            self._create_test_fasta(self.test_sequences, input_fasta)
            tree_path.write_text("((x:1,y:1):1,(z:1,w:1):1);\n")

            test_args = ['fastbhc', str(input_fasta), '-p', str(tree_path),
                         '--prior', 'fixed-symmetric', '-t', '0', '--quiet']
            with patch('sys.argv', test_args):
                with pytest.raises(SystemExit) as exc_info:
                    cli_main()
            assert exc_info.value.code == 1

    def test_cli_keyboard_interrupt(self):
        """Interruption exits with status 1."""
        with tempfile.TemporaryDirectory() as tmpdir:
            input_fasta = Path(tmpdir) / "test_input.fasta"
            self._create_test_fasta(self.test_sequences, input_fasta)

            with patch('sys.argv', ['fastbhc', str(input_fasta)]), \
                 patch('fastbhc.cli.load_alignment', side_effect=KeyboardInterrupt):
                with pytest.raises(SystemExit) as exc_info:
                    cli_main()
            assert exc_info.value.code == 1
