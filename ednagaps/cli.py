"""
ednagaps - eDNA reference database gap analysis

Command line entry point for the two workflows:
  species  WoRMS accepted species lists per marker
  align    within-genus sequence identity from cached blastn alignments
"""

import argparse
from pathlib import Path

from .config import CONFIG, ALIGNMENTS_DIRNAME, INPUT_TAXONOMY_FILENAME, setup_logging
from . import alignment, reference_databases, taxonomy


def parse_reference(value):
    """Parse a MARKER=PATH argument."""
    marker, sep, path = value.partition('=')
    if not sep or not marker.strip() or not path.strip():
        raise argparse.ArgumentTypeError(f"expected MARKER=PATH, got '{value}'")
    return marker.strip(), path.strip()


def reference_mapping(references):
    """Reference database mapping {marker: {'taxa': path}} from parsed MARKER=PATH pairs."""
    mapping = {}
    for marker, path in references:
        if marker in mapping:
            raise ValueError(f"Marker given more than once: {marker}")
        if not Path(path).exists():
            raise FileNotFoundError(f"Taxon table not found for {marker}: {path}")
        mapping[marker] = {'taxa': path}
    return mapping


def print_banner(title):
    print("=" * 70)
    print(title)
    print("=" * 70)


# =============================================================================
# COMMANDS
# =============================================================================

def run_species(args, references):
    print_banner("ednagaps - WoRMS accepted species per marker")
    print(f"\nWorkspace: {args.workspace}")
    for marker, paths in references.items():
        print(f"  {marker}: {paths['taxa']}")
    print()

    output = reference_databases.generate_reference_species(references, args.workspace)

    marker_species = taxonomy.add_groups(reference_databases.read_reference_species(args.workspace))
    input_taxonomy = reference_databases.read_input_taxonomy(args.workspace)

    print()
    print_banner("SPECIES LISTS COMPLETE")
    n_resolved = input_taxonomy["scientificname"].notna().sum() if "scientificname" in input_taxonomy else 0
    print(f"Input names resolved:  {n_resolved}/{len(input_taxonomy)}")
    for marker, group in marker_species.groupby('marker'):
        print(f"  {marker}: {group['species'].nunique()} accepted species")
        counts = group.drop_duplicates(subset=['species'])['group'].value_counts()
        for name, n in counts.items():
            print(f"      {name:<14} {n}")
    print(f"\nOutput files:")
    print(f"  {Path(args.workspace) / INPUT_TAXONOMY_FILENAME}")
    print(f"  {output}")


def run_align(args, references):
    print_banner("ednagaps - within-genus sequence identity")
    print(f"\nWorkspace: {args.workspace}")
    print(f"Marker:    {args.marker}")
    print(f"  blastn: {CONFIG['blastn_path']} (word size {CONFIG['word_size']})")
    print(f"  Max sequences per species: {CONFIG['max_sequences_per_species']}")
    print()

    database = reference_databases.read_reference_databases({args.marker: references[args.marker]})
    cache = alignment.AlignmentCache(Path(args.workspace) / ALIGNMENTS_DIRNAME, args.marker)
    stats = alignment.run_alignments(database, args.marker, cache, genera=args.genus or None)

    summary = alignment.summarize_identity(cache, database)
    summary_path = Path(args.workspace) / f"identity_summary_{args.marker}.csv"
    summary.to_csv(summary_path, index=False)

    print()
    print_banner("ALIGNMENT COMPLETE")
    print(f"Genera aligned:              {stats['aligned']}")
    print(f"Genera already cached:       {stats['cached']}")
    print(f"Genera with < 2 sequences:   {stats['too_few']}")
    print(f"Genera failed:               {stats['failed']}")
    print(f"\nOutput files:")
    print(f"  {cache.path}/")
    print(f"  {summary_path}")


# =============================================================================
# COMMAND LINE INTERFACE
# =============================================================================

def build_parser():
    parser = argparse.ArgumentParser(
        prog="ednagaps",
        description="ednagaps - eDNA reference database gap analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Example usage:
  ednagaps species \\
      --workspace results \\
      --reference COI=reference/coi_taxa.tsv \\
      --reference 12S=reference/12s_taxa.tsv

  ednagaps align \\
      --workspace results \\
      --reference COI=reference/coi_taxa.tsv \\
      --marker COI --max-per-species 3 --seed 42

Alignments are cached per genus under WORKSPACE/alignments/MARKER.
Delete that directory to force recomputation.
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    species = subparsers.add_parser("species", help="Build WoRMS accepted species lists per marker")
    align = subparsers.add_parser("align", help="Align sequences within genera and summarise identity")

    for sub in (species, align):
        io_opts = sub.add_argument_group('Input/output options')
        io_opts.add_argument("--workspace", "-w", required=True,
                             help="Directory for output tables and caches")
        io_opts.add_argument("--reference", "-r", action="append", required=True, type=parse_reference,
                             metavar="MARKER=PATH",
                             help="Reference database taxon table for a marker (repeatable)")
        io_opts.add_argument("--log-level", default="INFO",
                             help="Logging level (default: INFO)")

    api_opts = species.add_argument_group('WoRMS API settings')
    api_opts.add_argument("--worms-url", default=CONFIG['worms_url'],
                          help=f"WoRMS REST base URL (default: {CONFIG['worms_url']})")
    api_opts.add_argument("--batch-size", type=int, default=CONFIG['batch_size'],
                          help=f"Names per WoRMS request (default: {CONFIG['batch_size']})")
    api_opts.add_argument("--max-concurrent", type=int, default=CONFIG['max_concurrent_requests'],
                          help=f"Maximum concurrent WoRMS requests (default: {CONFIG['max_concurrent_requests']})")
    api_opts.add_argument("--worms-rate-limit", type=float, default=CONFIG['worms_rate_limit'],
                          help=f"Seconds between WoRMS requests (default: {CONFIG['worms_rate_limit']})")
    api_opts.add_argument("--timeout", type=float, default=CONFIG['request_timeout'],
                          help=f"WoRMS request timeout in seconds (default: {CONFIG['request_timeout']})")

    align.add_argument("--marker", "-m", required=True,
                       help="Marker to align (must be one of the --reference markers)")
    align.add_argument("--genus", "-g", action="append",
                       help="Only align this genus (repeatable; default: all genera)")
    comp_opts = align.add_argument_group('Sequence comparison settings')
    comp_opts.add_argument("--blastn-path", default=CONFIG['blastn_path'],
                           help=f"Path to blastn executable (default: {CONFIG['blastn_path']})")
    comp_opts.add_argument("--word-size", type=int, default=CONFIG['word_size'],
                           help=f"blastn word size (default: {CONFIG['word_size']})")
    comp_opts.add_argument("--max-per-species", type=int, default=CONFIG['max_sequences_per_species'],
                           help=f"Sequences sampled per species (default: {CONFIG['max_sequences_per_species']})")
    comp_opts.add_argument("--seed", type=int, default=None,
                           help="Random seed for sequence sampling")
    return parser


def update_config(args):
    """Copy command line settings into CONFIG."""
    if args.command == "species":
        if args.batch_size < 1 or args.batch_size > 50:
            raise ValueError("--batch-size must be between 1 and 50")
        if args.max_concurrent < 1:
            raise ValueError("--max-concurrent must be at least 1")
        if args.timeout <= 0:
            raise ValueError("--timeout must be positive")
        if args.worms_rate_limit < 0:
            raise ValueError("--worms-rate-limit must not be negative")
        CONFIG['worms_url'] = args.worms_url
        CONFIG['batch_size'] = args.batch_size
        CONFIG['max_concurrent_requests'] = args.max_concurrent
        CONFIG['worms_rate_limit'] = args.worms_rate_limit
        CONFIG['request_timeout'] = args.timeout
    elif args.command == "align":
        if args.max_per_species < 1:
            raise ValueError("--max-per-species must be at least 1")
        CONFIG['blastn_path'] = args.blastn_path
        CONFIG['word_size'] = args.word_size
        CONFIG['max_sequences_per_species'] = args.max_per_species
        CONFIG['random_seed'] = args.seed


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.log_level)

    try:
        references = reference_mapping(args.reference)
        update_config(args)
    except (ValueError, FileNotFoundError) as e:
        parser.error(str(e))

    if args.command == "align" and args.marker not in references:
        parser.error(f"--marker {args.marker} has no --reference table")

    Path(args.workspace).mkdir(parents=True, exist_ok=True)

    if args.command == "species":
        run_species(args, references)
    else:
        run_align(args, references)


if __name__ == "__main__":
    main()
