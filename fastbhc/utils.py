"""
Utility functions for fastbhc.

This module provides helpers for reading alignments and phylogenies and for
writing partitions.
"""

import logging
from typing import Dict, List, Sequence

from Bio import Phylo, SeqIO

from .errors import InputValidationError
from .sparse_data import DEFAULT_ALPHABET, SparseAlleleMatrix


def load_alignment(alignment_path: str, alphabet: str = DEFAULT_ALPHABET) -> SparseAlleleMatrix:
    """
    Load a FASTA alignment into a sparse allele matrix.

    Args:
        alignment_path: Path to the aligned FASTA file
        alphabet: Allele alphabet; other characters are read as gaps

    Returns:
        SparseAlleleMatrix over the variant sites, with the symmetric prior
    """
    sequences = []
    labels = []

    try:
        for record in SeqIO.parse(alignment_path, "fasta"):
            sequences.append(str(record.seq).upper())
            labels.append(record.id)
    except Exception as e:
        logging.error(f"Error reading FASTA file: {e}")
        raise

    if not sequences:
        raise InputValidationError(f"No sequences found in {alignment_path}")

    lengths = {len(seq) for seq in sequences}
    if len(lengths) != 1:
        raise InputValidationError(
            f"Sequences in {alignment_path} are not aligned (found lengths {sorted(lengths)})"
        )

    matrix = SparseAlleleMatrix.from_sequences(sequences, labels, alphabet=alphabet)
    logging.debug(f"Alignment of {len(sequences)} x {lengths.pop()} reduced to {matrix.n_sites} variant sites")
    return matrix


def load_phylogeny(tree_path: str, format: str = "newick"):
    """
    Read a single phylogeny with Bio.Phylo.

    Args:
        tree_path: Path to the tree file
        format: Any format Bio.Phylo can read (default newick)

    Returns:
        Bio.Phylo tree
    """
    try:
        return Phylo.read(tree_path, format)
    except Exception as e:
        logging.error(f"Error reading phylogeny: {e}")
        raise


def save_partitions_to_file(levels: Sequence[Dict[str, int]], labels: Sequence[str], output_path: str):
    """
    Save multi-level partitions as a comma-delimited table.

    The first column holds the sequence label and column ``Level k`` the
    cluster id at level k.

    Args:
        levels: One partition (label -> cluster id) per level
        labels: Row order of the table
        output_path: Path to the output file
    """
    missing: List[str] = [label for label in labels if any(label not in level for level in levels)]
    if missing:
        raise InputValidationError(f"Labels missing from partitions: {missing[:10]}")

    with open(output_path, 'w') as f:
        header = ["Isolates"] + [f"Level {k}" for k in range(1, len(levels) + 1)]
        f.write(",".join(header) + "\n")
        for label in labels:
            row = [label] + [str(level[label]) for level in levels]
            f.write(",".join(row) + "\n")

    logging.debug(f"Wrote {len(levels)} levels for {len(labels)} sequences to {output_path}")
