"""
Reference database taxon tables and WoRMS accepted species lists.

Reference databases are described as a mapping of marker name to file paths,
for example {'COI': {'taxa': 'coi_taxa.tsv'}, '12S': {'taxa': '12s_taxa.tsv'}}.
Taxon tables are headerless, tab separated and ragged:

    seqid  taxid  kingdom  phylum  class  order  family  genus  species  [sequence]

Species names use underscores instead of spaces.
"""

import csv
import logging
from pathlib import Path

import pandas as pd
from tqdm import tqdm

from .config import INPUT_TAXONOMY_FILENAME, REFERENCE_SPECIES_FILENAME
from . import worms

logger = logging.getLogger(__name__)

TAXON_COLUMNS = ['seqid', 'taxid', 'kingdom', 'phylum', 'class', 'order', 'family', 'genus', 'species']
SEQUENCE_COLUMN = 'sequence'
NULL_TOKENS = ['', 'nan']
CONTAMINANT_SPECIES = {'Homo sapiens'}
UNCERTAIN_MARKERS = (' sp.', ' aff.', ' cf.')

HABITAT_COLUMNS = ['isMarine', 'isBrackish', 'isFreshwater', 'isTerrestrial']
REFERENCE_SPECIES_COLUMNS = (['marker', 'phylum', 'class', 'order', 'family', 'genus', 'species']
                             + HABITAT_COLUMNS + ['input'])

# Written with a fixed gzip mtime so identical tables give identical files
GZIP = {'method': 'gzip', 'mtime': 0}


# =============================================================================
# TAXON TABLE READER
# =============================================================================

def count_fields(path):
    """Maximum number of tab separated fields on any line of path."""
    max_fields = 0
    with open(path, 'r', newline='') as f:
        for fields in csv.reader(f, delimiter='\t', quotechar='"'):
            max_fields = max(max_fields, len(fields))
    return max_fields


def read_taxon_table(path, marker, with_sequence=False):
    """
    Read a reference database taxon table into one row per sequence.

    The number of columns is taken from the widest row so that no row is
    truncated; shorter rows are padded with nulls. Only the first 9 columns
    (10 with the sequence) are kept.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Reference database taxon table not found: {path}")

    columns = TAXON_COLUMNS + ([SEQUENCE_COLUMN] if with_sequence else [])
    ncol = count_fields(path)

    if ncol == 0:
        df = pd.DataFrame(columns=columns)
    else:
        df = pd.read_csv(
            path,
            sep='\t',
            header=None,
            names=list(range(ncol)),
            quotechar='"',
            dtype=str,
            na_values=NULL_TOKENS,
            keep_default_na=False,
        )
        df = df.reindex(columns=list(range(len(columns))))
        df.columns = columns

    df['species'] = df['species'].map(lambda s: s.replace('_', ' ') if isinstance(s, str) else s)
    # None is the only null, in every column
    df = df.astype(object).where(df.notna(), None)
    df = df[~df['species'].isin(CONTAMINANT_SPECIES)].reset_index(drop=True)
    df['marker'] = marker
    return df


def get_marker_species_list(path, marker):
    """Distinct taxonomy rows of a taxon table, tagged with marker."""
    df = read_taxon_table(path, marker)
    return (df.drop(columns=['seqid'])
              .drop_duplicates(subset=TAXON_COLUMNS[1:])
              .reset_index(drop=True))


def read_reference_databases(reference_databases):
    """Read the full taxon tables, sequences included, for all markers."""
    frames = []
    for marker in tqdm(list(reference_databases), desc="  Reading reference databases", unit="marker"):
        frames.append(read_taxon_table(reference_databases[marker]['taxa'], marker, with_sequence=True))
    if not frames:
        return pd.DataFrame(columns=TAXON_COLUMNS + [SEQUENCE_COLUMN, 'marker'])
    return pd.concat(frames, ignore_index=True)


# =============================================================================
# NAME NORMALIZER
# =============================================================================

def is_uncertain_name(name):
    """True for names with an uncertain identification (sp., aff., cf.)."""
    return any(marker in name for marker in UNCERTAIN_MARKERS)


def filter_candidate_names(names):
    """Distinct, certain species names in first-seen order."""
    seen = set()
    candidates = []
    for name in names:
        if not isinstance(name, str) or not name or is_uncertain_name(name):
            continue
        if name not in seen:
            seen.add(name)
            candidates.append(name)
    return candidates


# =============================================================================
# TAXONOMY MATERIALIZER
# =============================================================================

def build_input_taxonomy(matched_names, valid_taxa):
    """
    Join the first WoRMS match of every input name to its accepted record.

    Which match comes first depends on the order WoRMS returns candidates
    in; no ranking is applied.
    """
    first_matches = (matched_names[['input', 'valid_AphiaID']]
                     .groupby('input', sort=False)
                     .head(1)
                     .reset_index(drop=True))

    taxa = (valid_taxa.drop(columns=['input', 'valid_AphiaID'], errors='ignore')
                      .rename(columns={'AphiaID': 'valid_AphiaID'})
                      .drop_duplicates(subset=['valid_AphiaID'])
                      .copy())
    taxa['valid_AphiaID'] = pd.to_numeric(taxa['valid_AphiaID'], errors='coerce').astype('Int64')
    taxa = taxa.dropna(subset=['valid_AphiaID'])
    first_matches['valid_AphiaID'] = pd.to_numeric(first_matches['valid_AphiaID'], errors='coerce').astype('Int64')

    return first_matches.merge(taxa, on='valid_AphiaID', how='left')


def write_input_taxonomy(input_taxonomy, workspace):
    path = Path(workspace) / INPUT_TAXONOMY_FILENAME
    input_taxonomy.to_csv(path, index=False, na_rep='', compression=GZIP)
    logger.info(f"Wrote {len(input_taxonomy)} input taxonomy rows to {path}")
    return path


def read_input_taxonomy(workspace):
    return pd.read_csv(Path(workspace) / INPUT_TAXONOMY_FILENAME, compression='gzip')


# =============================================================================
# MARKER SPECIES TABLE
# =============================================================================

def build_marker_species(reference_input_names, input_taxonomy):
    """Accepted species per marker; only inputs resolved to rank Species are kept."""
    pairs = reference_input_names[['marker', 'species']].drop_duplicates()
    taxonomy = input_taxonomy.drop(columns=['marker', 'species'], errors='ignore')
    joined = pairs.merge(taxonomy, left_on='species', right_on='input', how='left')

    for col in REFERENCE_SPECIES_COLUMNS + ['scientificname', 'rank']:
        if col not in joined.columns and col != 'species':
            joined[col] = None

    resolved = joined[joined['scientificname'].notna() & (joined['rank'] == 'Species')]
    marker_species = resolved.drop(columns=['species']).rename(columns={'scientificname': 'species'})
    return marker_species[REFERENCE_SPECIES_COLUMNS].reset_index(drop=True)


def write_reference_species(marker_species, workspace):
    path = Path(workspace) / REFERENCE_SPECIES_FILENAME
    marker_species.to_csv(path, index=False, na_rep='', compression=GZIP)
    logger.info(f"Wrote {len(marker_species)} marker species rows to {path}")
    return path


def read_reference_species(workspace):
    return pd.read_csv(Path(workspace) / REFERENCE_SPECIES_FILENAME, compression='gzip')


def generate_reference_species(reference_databases, workspace, client=None):
    """
    Create species lists with WoRMS accepted names for a set of reference databases.

    Both the input taxonomy and the marker species table are written to the
    workspace, replacing earlier versions. Returns the marker species table path.
    """
    workspace = Path(workspace)
    workspace.mkdir(parents=True, exist_ok=True)
    client = client or worms.WormsClient()

    # marker and species names as found in the reference databases
    frames = [get_marker_species_list(reference_databases[marker]['taxa'], marker)
              for marker in tqdm(list(reference_databases), desc="  Reading species lists", unit="marker")]
    if frames:
        reference_input_names = pd.concat(frames, ignore_index=True)[['marker', 'species']]
    else:
        reference_input_names = pd.DataFrame(columns=['marker', 'species'])
    logger.info(f"Read {len(reference_input_names)} marker/species rows from {len(frames)} reference databases")

    # WoRMS matches for all candidate names
    candidates = filter_candidate_names(reference_input_names['species'])
    matched_names = worms.match_names(candidates, client=client)
    n_matched = matched_names['input'].nunique()
    logger.info(f"WoRMS returned matches for {n_matched}/{len(candidates)} candidate names")

    # WoRMS taxonomy for all accepted AphiaIDs
    valid_taxa = worms.fetch_accepted_taxa(matched_names['valid_AphiaID'], client=client)

    input_taxonomy = build_input_taxonomy(matched_names, valid_taxa)
    write_input_taxonomy(input_taxonomy, workspace)

    marker_species = build_marker_species(reference_input_names, input_taxonomy)
    return write_reference_species(marker_species, workspace)
