"""
Runtime configuration for the ednagaps pipelines.

CONFIG holds the tunable parameters. The command line interface overwrites
entries from its arguments before any pipeline step runs.
"""

import logging

# =============================================================================
# CONFIGURATION - Adjust these parameters as needed
# =============================================================================

CONFIG = {
    # --- WoRMS API Settings ---
    'worms_url': 'https://www.marinespecies.org/rest',
    'batch_size': 50,               # Names or AphiaIDs per WoRMS request (service maximum)
    'max_concurrent_requests': 10,  # Concurrent WoRMS requests
    'worms_rate_limit': 0.1,        # Seconds between WoRMS requests
    'request_timeout': 30,          # Seconds before a WoRMS request is abandoned

    # --- Sequence Alignment ---
    'blastn_path': 'blastn',        # Path to blastn executable
    'word_size': 11,                # blastn word size
    'max_sequences_per_species': 5, # Sequences sampled per species before aligning a genus
    'random_seed': None,            # Seed for sequence sampling (None = not reproducible)
}

# Workspace artifacts
REFERENCE_SPECIES_FILENAME = "reference_species.csv.gz"
INPUT_TAXONOMY_FILENAME = "input_taxonomy.csv.gz"
ALIGNMENTS_DIRNAME = "alignments"

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def setup_logging(level="INFO"):
    """Configure root logging for command line runs."""
    logging.basicConfig(
        level=getattr(logging, str(level).upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S%z",
    )
