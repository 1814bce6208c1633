"""Higher level taxonomic groups used to summarise reference species lists."""

import pandas as pd

# Group name -> {rank: [taxa]}
GROUPS = {
    'fish': {'class': ['Actinopteri', 'Cladistii', 'Coelacanthi', 'Elasmobranchii', 'Holocephali',
                       'Myxini', 'Petromyzonti', 'Teleostei']},
    'turtles': {'order': ['Testudines']},
    'molluscs': {'phylum': ['Mollusca']},
    'mammals': {'class': ['Mammalia']},
    'birds': {'class': ['Aves']},
    'amphibians': {'class': ['Amphibia']},
    'algae': {'phylum': ['Chlorophyta', 'Haptophyta', 'Rhodophyta', 'Ochrophyta', 'Bacillariophyta']},
    'echinoderms': {'phylum': ['Echinodermata']},
    'sponges': {'phylum': ['Porifera']},
    'cnidarians': {'phylum': ['Cnidaria', 'Ctenophora']},
    'unicellular': {'phylum': ['Cercozoa', 'Amoebozoa', 'Myzozoa']},
    'fungi': {'phylum': ['Ascomycota', 'Oomycota']},
    'worms': {'phylum': ['Nemertea', 'Gnathostomulida', 'Annelida']},
    'bryozoa': {'phylum': ['Bryozoa']},
    'phoronida': {'phylum': ['Phoronida']},
    'copepods': {'class': ['Copepoda']},
    'crustaceans': {'class': ['Malacostraca', 'Thecostraca', 'Branchiopoda']},
    'arrowworms': {'phylum': ['Chaetognatha']},
    'ascidians': {'class': ['Ascidiacea']},
}

# Lookup order when a taxon matches groups at several ranks
GROUP_RANKS = ('phylum', 'class', 'order')


def group_lookup(rank):
    """Map of taxon name -> group for one rank."""
    lookup = {}
    for group, ranks in GROUPS.items():
        for taxon in ranks.get(rank, []):
            lookup[taxon] = group
    return lookup


def add_groups(df):
    """
    Add a `group` column to a taxonomy table.

    A phylum match takes precedence over a class match, which takes
    precedence over an order match. An existing `group` value is kept when no
    rank matches.
    """
    df = df.copy()
    group = pd.Series([None] * len(df), index=df.index, dtype=object)
    for rank in GROUP_RANKS:
        if rank in df.columns:
            group = group.fillna(df[rank].map(group_lookup(rank)))
    if 'group' in df.columns:
        group = group.fillna(df['group'])
    df['group'] = group
    return df
