"""
Command-line interface for fastbhc.
"""

import argparse
import logging
import sys
from pathlib import Path

from .errors import FastBHCError
from .hierarchy import hierarchy_from_phylo
from .multires import MultiResolutionClustering
from .partition import DEFAULT_THRESHOLD
from .prior import PRIOR_MODES, PriorOptimizer
from .utils import load_alignment, load_phylogeny, save_partitions_to_file


def setup_logging(verbose: bool = False):
    """Configure logging based on verbosity level."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def validate_arguments(args) -> list:
    """Return a list of configuration problems, empty when the arguments are usable."""
    errors = []
    if args.levels < 1:
        errors.append(f"--levels must be a positive integer, got {args.levels}")
    if args.k_init is not None and args.k_init < 1:
        errors.append(f"--k-init must be a positive integer, got {args.k_init}")
    if not args.alpha > 0:
        errors.append(f"--alpha must be positive, got {args.alpha}")
    if args.threshold > 0:
        errors.append(f"--threshold is a log probability and must not exceed 0, got {args.threshold}")
    if args.threads is not None and args.threads < 0:
        errors.append(f"--threads must not be negative, got {args.threads}")
    return errors


def main():
    """Main entry point for the fastbhc CLI."""
    parser = argparse.ArgumentParser(
        description='fastbhc: Bayesian hierarchical clustering of aligned sequences',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  fastbhc alignment.fasta                          # Creates alignment.clusters.csv
  fastbhc alignment.fasta -o clusters.csv -l 3     # Three nested levels
  fastbhc alignment.fasta --prior fixed-symmetric
  fastbhc alignment.fasta -p tree.nwk              # Partition an existing rooted phylogeny
  fastbhc alignment.fasta --no-linkage-seed -t 0   # Start from single sequences, one process
        """
    )

    # Required arguments
    parser.add_argument(
        'input',
        help='Input FASTA file containing aligned sequences'
    )

    # Output options
    parser.add_argument(
        '-o', '--output',
        help='Output CSV file (default: <input>.clusters.csv)'
    )

    # Algorithm parameters
    parser.add_argument(
        '--prior',
        choices=PRIOR_MODES,
        default='optimize-symmetric',
        help='Dirichlet prior: fixed or optimised symmetric / population prior (default: optimize-symmetric)'
    )
    parser.add_argument(
        '-l', '--levels',
        type=int,
        default=2,
        help='Number of nested partition levels to report (default: 2)'
    )
    parser.add_argument(
        '-p', '--phylogeny',
        help='Rooted Newick phylogeny to partition at level 1 instead of building a BHC hierarchy'
    )
    seeding = parser.add_mutually_exclusive_group()
    seeding.add_argument(
        '--k-init',
        type=int,
        help='Number of ward linkage clusters used to seed BHC (default: a quarter of the sequences)'
    )
    seeding.add_argument(
        '--no-linkage-seed',
        action='store_true',
        help='Start BHC from single sequences instead of linkage clusters'
    )
    parser.add_argument(
        '--alpha',
        type=float,
        default=1.0,
        help='Dirichlet process concentration parameter (default: 1.0)'
    )
    parser.add_argument(
        '--threshold',
        type=float,
        default=DEFAULT_THRESHOLD,
        help='Log merge probability at or above which a node is kept as one cluster (default: log 0.5)'
    )

    # Additional options
    parser.add_argument(
        '-t', '--threads',
        type=int,
        help='Number of worker processes (default: auto-detect, 0: single-process)'
    )
    parser.add_argument(
        '--quiet',
        action='store_true',
        help='Disable progress bars'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    args = parser.parse_args()

    # Setup logging
    setup_logging(args.verbose)

    errors = validate_arguments(args)
    if errors:
        for error in errors:
            logging.error(error)
        sys.exit(1)

    try:
        input_path = Path(args.input)
        if not input_path.exists():
            logging.error(f"Input file not found: {args.input}")
            sys.exit(1)
        if args.phylogeny and not Path(args.phylogeny).exists():
            logging.error(f"Phylogeny file not found: {args.phylogeny}")
            sys.exit(1)

        if args.output is None:
            args.output = str(input_path.with_suffix('.clusters.csv'))

        logging.info(f"Loading alignment from {args.input}")
        matrix = load_alignment(str(input_path))
        logging.info(f"Loaded {matrix.n_sequences} sequences with {matrix.n_sites} variant sites")

        # Without --k-init every build seeds from its own sequence count
        initial_clusters = args.k_init
        linkage_seed = initial_clusters is None and not args.no_linkage_seed

        show_progress = not args.quiet
        logging.info(f"Choosing prior ({args.prior})...")
        prior_optimizer = PriorOptimizer(alpha=args.alpha,
                                         initial_clusters=initial_clusters,
                                         linkage_seed=linkage_seed,
                                         num_threads=args.threads,
                                         show_progress=show_progress)
        matrix, prior_result = prior_optimizer.apply(matrix, args.prior)
        logging.info(f"Using prior mixing={prior_result.mixing:.4f}, scale={prior_result.scale:.4g}")

        hierarchy = None
        if args.phylogeny:
            logging.info(f"Loading phylogeny from {args.phylogeny}")
            hierarchy = hierarchy_from_phylo(load_phylogeny(args.phylogeny))

        clustering = MultiResolutionClustering(n_levels=args.levels,
                                               alpha=args.alpha,
                                               threshold=args.threshold,
                                               initial_clusters=initial_clusters,
                                               linkage_seed=linkage_seed,
                                               prior_mode=args.prior,
                                               num_threads=args.threads,
                                               show_progress=show_progress)
        levels = clustering.cluster(matrix, hierarchy)

        logging.debug(f"Saving results to {args.output}")
        save_partitions_to_file(levels, matrix.labels, args.output)
        logging.info(f"Wrote {len(levels)} levels to {args.output}")

    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        sys.exit(1)
    except FastBHCError as e:
        logging.error(f"Error: {e}")
        sys.exit(1)
    except Exception as e:
        logging.error(f"Error: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        sys.exit(1)


if __name__ == '__main__':
    main()
