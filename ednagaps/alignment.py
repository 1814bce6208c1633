"""
Within-genus sequence identity from all-against-all blastn alignments.

For every genus in a reference database, a capped random sample of
sequences per species is aligned against itself. The deduplicated pairwise
results are cached per genus, so reruns only align genera that are not in
the cache yet. The cache has no expiry; delete its directory to recompute.

Genera are processed sequentially by one process. The cache existence
check is a resume mechanism, not a lock: running several writers against
the same cache is not supported.
"""

import io
import logging
import os
import subprocess
import tempfile
from pathlib import Path
from urllib.parse import quote, unquote

import numpy as np
import pandas as pd
from tqdm import tqdm

from .config import CONFIG

logger = logging.getLogger(__name__)

# blastn -outfmt 6
BLAST_COLUMNS = ['qseqid', 'sseqid', 'pident', 'length', 'mismatch', 'gapopen',
                 'qstart', 'qend', 'sstart', 'send', 'evalue', 'bitscore']
PAIR_COLUMNS = ['id1', 'id2'] + BLAST_COLUMNS + ['qlen', 'qcov']


# =============================================================================
# ALIGNMENT CACHE
# =============================================================================

class AlignmentCache:
    """Directory backed store of alignment tables, one file per genus, one directory per marker."""

    suffix = '.csv.gz'

    def __init__(self, root, marker):
        self.marker = marker
        self.path = Path(root) / marker
        self.path.mkdir(parents=True, exist_ok=True)

    def _file(self, genus):
        # Percent encoding keeps distinct genus names in distinct files
        return self.path / f"{quote(genus, safe='')}{self.suffix}"

    def exists(self, genus):
        return self._file(genus).exists()

    def get(self, genus):
        path = self._file(genus)
        if not path.exists():
            return None
        header = pd.read_csv(path, compression='gzip', nrows=0).columns
        ids = {col: str for col in ('id1', 'id2', 'qseqid', 'sseqid') if col in header}
        return pd.read_csv(path, compression='gzip', dtype=ids)

    def set(self, genus, table):
        """Store the table for genus unless an entry exists. Returns True if written."""
        target = self._file(genus)
        if target.exists():
            logger.debug(f"Cache entry for {genus} ({self.marker}) exists, not overwriting")
            return False
        fd, tmp = tempfile.mkstemp(dir=self.path, suffix='.tmp')
        os.close(fd)
        try:
            table.to_csv(tmp, index=False, compression='gzip')
            os.replace(tmp, target)
        finally:
            Path(tmp).unlink(missing_ok=True)
        return True

    def keys(self):
        return sorted(unquote(p.name[:-len(self.suffix)]) for p in self.path.glob(f"*{self.suffix}"))

    def __contains__(self, genus):
        return self.exists(genus)

    def __len__(self):
        return len(self.keys())


# =============================================================================
# SEQUENCE SELECTION
# =============================================================================

def sample_sequences(df, max_per_species=None, seed=None):
    """Keep at most max_per_species sequences per species, chosen uniformly at random."""
    if max_per_species is None:
        max_per_species = CONFIG['max_sequences_per_species']
    if seed is None:
        seed = CONFIG['random_seed']
    if df.empty:
        return df
    shuffled = df.sample(frac=1, random_state=seed)
    return shuffled.groupby('species', sort=False).head(max_per_species).sort_index()


# =============================================================================
# BLAST
# =============================================================================

def write_fasta(handle, sequences):
    for seqid, sequence in sequences:
        handle.write(f">{seqid}\n{sequence}\n")


def parse_blast_output(text):
    """Parse blastn -outfmt 6 output into a table with BLAST_COLUMNS."""
    if not text.strip():
        return pd.DataFrame(columns=BLAST_COLUMNS)
    return pd.read_csv(io.StringIO(text), sep='\t', header=None, names=BLAST_COLUMNS,
                       dtype={'qseqid': str, 'sseqid': str})


def deduplicate_pairs(hits, lengths):
    """
    Drop self hits and keep one row per unordered pair of sequences.

    The pair key is (min(qseqid, sseqid), max(qseqid, sseqid)). Query
    coverage is (qend - qstart + 1) / qlen * 100.
    """
    hits = hits[hits['qseqid'] != hits['sseqid']].copy()
    q = hits['qseqid'].astype(str).to_numpy()
    s = hits['sseqid'].astype(str).to_numpy()
    hits.insert(0, 'id1', np.where(q < s, q, s))
    hits.insert(1, 'id2', np.where(q < s, s, q))
    hits = hits.drop_duplicates(subset=['id1', 'id2'])
    hits['qlen'] = hits['qseqid'].map(lengths)
    hits['qcov'] = (hits['qend'] - hits['qstart'] + 1) / hits['qlen'] * 100
    return hits[PAIR_COLUMNS].reset_index(drop=True)


def align_genus(sequences):
    """
    Align sequences all against all with blastn.

    sequences maps sequence id -> nucleotide sequence. Returns the
    deduplicated pair table, or None if blastn fails or its output cannot
    be read.
    """
    # Local ids keep blastn from rewriting reference ids
    local_ids = {f"s{i}": seqid for i, seqid in enumerate(sequences)}
    lengths = {seqid: len(seq) for seqid, seq in sequences.items()}

    fasta_file = None
    try:
        with tempfile.NamedTemporaryFile(mode='w', suffix='.fasta', delete=False) as f:
            fasta_file = f.name
            write_fasta(f, ((local, sequences[seqid]) for local, seqid in local_ids.items()))

        cmd = [CONFIG['blastn_path'], '-query', fasta_file, '-subject', fasta_file,
               '-task', 'blastn', '-word_size', str(CONFIG['word_size']), '-dust', 'no',
               '-outfmt', '6']
        result = subprocess.run(cmd, capture_output=True, text=True)
        if result.returncode != 0:
            logger.error(f"blastn failed ({result.returncode}): {result.stderr.strip()}")
            return None

        hits = parse_blast_output(result.stdout)
        hits['qseqid'] = hits['qseqid'].map(local_ids)
        hits['sseqid'] = hits['sseqid'].map(local_ids)
        if hits[['qseqid', 'sseqid']].isna().any().any():
            raise ValueError("blastn reported sequence ids that were not in the query")
        return deduplicate_pairs(hits, lengths)
    except FileNotFoundError:
        logger.error(f"blastn not found at {CONFIG['blastn_path']}")
        return None
    except OSError as e:
        logger.error(f"Could not run blastn: {e}")
        return None
    except (ValueError, TypeError) as e:
        logger.error(f"Could not parse blastn output: {e}")
        return None
    finally:
        if fasta_file is not None:
            Path(fasta_file).unlink(missing_ok=True)


# =============================================================================
# WORKFLOW
# =============================================================================

def alignment_candidates(reference_database, marker):
    """Reference rows of one marker usable for alignment."""
    df = reference_database[reference_database['marker'] == marker]
    df = df.dropna(subset=['seqid', 'genus', 'species', 'sequence'])
    return df.drop_duplicates(subset=['seqid'])


def run_alignments(reference_database, marker, cache, genera=None):
    """
    Align every genus of a marker that is not cached yet.

    Genera with fewer than two sequences after sampling are skipped and not
    cached. Failed alignments are not cached either, so both are retried on
    the next run. Returns counts per outcome.
    """
    candidates = alignment_candidates(reference_database, marker)
    if genera is None:
        genera = sorted(candidates['genus'].unique())

    stats = {'aligned': 0, 'cached': 0, 'too_few': 0, 'failed': 0}
    pbar = tqdm(genera, desc=f"  Aligning {marker}", unit="genus")
    for genus in pbar:
        if cache.exists(genus):
            stats['cached'] += 1
            continue

        selected = sample_sequences(candidates[candidates['genus'] == genus])
        if len(selected) < 2:
            stats['too_few'] += 1
            continue

        pairs = align_genus(dict(zip(selected['seqid'], selected['sequence'])))
        if pairs is None:
            logger.warning(f"Alignment failed for genus {genus} ({marker})")
            stats['failed'] += 1
            continue

        cache.set(genus, pairs)
        stats['aligned'] += 1
        pbar.set_postfix(stats)
    pbar.close()

    logger.info(f"{marker}: {stats['aligned']} genera aligned, {stats['cached']} cached, "
                f"{stats['too_few']} with fewer than 2 sequences, {stats['failed']} failed")
    return stats


def summarize_identity(cache, reference_database):
    """
    Identity between sequences of the same species (intra) and of different
    species of the same genus (inter), per genus.
    """
    species_of = (reference_database.dropna(subset=['seqid'])
                  .drop_duplicates(subset=['seqid'])
                  .set_index('seqid')['species'])

    frames = []
    for genus in cache.keys():
        pairs = cache.get(genus)
        if pairs is None or pairs.empty:
            continue
        pairs = pairs.assign(genus=genus)
        frames.append(pairs)

    columns = ['genus', 'comparison', 'n_pairs', 'min_pident', 'median_pident', 'max_pident']
    if not frames:
        return pd.DataFrame(columns=columns)

    pairs = pd.concat(frames, ignore_index=True)
    pairs['species1'] = pairs['id1'].map(species_of)
    pairs['species2'] = pairs['id2'].map(species_of)
    pairs = pairs.dropna(subset=['species1', 'species2'])
    pairs['comparison'] = np.where(pairs['species1'] == pairs['species2'], 'intra', 'inter')

    summary = (pairs.groupby(['genus', 'comparison'])['pident']
                    .agg(n_pairs='size', min_pident='min', median_pident='median', max_pident='max')
                    .reset_index())
    return summary[columns]
