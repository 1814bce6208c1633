"""
Batched name resolution against the World Register of Marine Species.

Names and AphiaIDs are sent to the WoRMS REST service in batches of at most
CONFIG['batch_size']. Batches run concurrently on one event loop, bounded by
a semaphore. A batch that fails for any reason (network, HTTP status,
malformed response) is recorded as a failed BatchResult and logged; the
remaining batches still run and their results are concatenated.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

import aiohttp
import pandas as pd
from tqdm import tqdm

from .config import CONFIG

logger = logging.getLogger(__name__)

USER_AGENT = "ednagaps (eDNA reference database gap analysis)"


class WormsError(Exception):
    """Raised when WoRMS answers with an unexpected status or payload."""


@dataclass
class BatchResult:
    """Outcome of one batch request: a table on success, a reason on failure."""
    batch: list
    value: Optional[pd.DataFrame] = None
    error: Optional[str] = None

    @property
    def ok(self):
        return self.error is None


def make_batches(items, size=None):
    """Split items into consecutive, order-preserving batches of at most size."""
    if size is None:
        size = CONFIG['batch_size']
    if size < 1:
        raise ValueError(f"Batch size must be positive, got {size}")
    items = list(items)
    return [items[i:i + size] for i in range(0, len(items), size)]


def _as_aphiaid(series):
    return pd.to_numeric(series, errors='coerce').astype('Int64')


class WormsClient:
    """Thin async client for the two WoRMS endpoints used by the pipeline."""

    def __init__(self, base_url=None, max_concurrent=None, rate_limit=None, timeout=None):
        self.base_url = (base_url or CONFIG['worms_url']).rstrip('/')
        self.max_concurrent = CONFIG['max_concurrent_requests'] if max_concurrent is None else max_concurrent
        self.rate_limit = CONFIG['worms_rate_limit'] if rate_limit is None else rate_limit
        self.timeout = CONFIG['request_timeout'] if timeout is None else timeout
        # A zero semaphore never lets a request through
        if self.max_concurrent < 1:
            raise ValueError(f"max_concurrent must be at least 1, got {self.max_concurrent}")
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.rate_limit < 0:
            raise ValueError(f"rate_limit must not be negative, got {self.rate_limit}")
        self._semaphore = None

    @property
    def semaphore(self):
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return self._semaphore

    def session(self):
        # A semaphore belongs to one event loop; each run gets a fresh one
        self._semaphore = asyncio.Semaphore(self.max_concurrent)
        return aiohttp.ClientSession(headers={'User-Agent': USER_AGENT, 'Accept': 'application/json'})

    async def _get_json(self, session, endpoint, params):
        url = f"{self.base_url}/{endpoint}"
        async with self.semaphore:
            async with session.get(url, params=params, timeout=aiohttp.ClientTimeout(total=self.timeout)) as resp:
                if resp.status == 204:
                    data = []
                elif resp.status == 200:
                    data = await resp.json(content_type=None)
                else:
                    raise WormsError(f"{endpoint} returned HTTP {resp.status}")
            await asyncio.sleep(self.rate_limit)
        return data

    async def records_by_names(self, session, names):
        """
        Match a batch of names (exact, not restricted to marine taxa).

        Returns one row per (input, candidate record). Names without any
        candidate get a single row with a null valid_AphiaID, so every input
        is represented.
        """
        params = [('scientificnames[]', name) for name in names]
        params += [('like', 'false'), ('marine_only', 'false')]
        data = await self._get_json(session, 'AphiaRecordsByNames', params)

        if not data:
            data = [[] for _ in names]
        if not isinstance(data, list) or len(data) != len(names):
            raise WormsError(f"AphiaRecordsByNames returned {len(data) if isinstance(data, list) else type(data).__name__} "
                             f"results for {len(names)} names")

        rows = []
        for name, records in zip(names, data):
            records = [r for r in (records or []) if r]
            if not records:
                rows.append({'input': name, 'valid_AphiaID': None})
                continue
            for record in records:
                rows.append({'input': name, **record})
        return _names_frame(rows)

    async def records_by_ids(self, session, aphia_ids):
        """Fetch full AphiaRecords for a batch of AphiaIDs."""
        params = [('aphiaids[]', str(int(aphia_id))) for aphia_id in aphia_ids]
        data = await self._get_json(session, 'AphiaRecordsByAphiaIDs', params)
        if not isinstance(data, list):
            raise WormsError(f"AphiaRecordsByAphiaIDs returned {type(data).__name__}, expected a list")
        return _records_frame([r for r in data if r])


def _names_frame(rows):
    df = pd.DataFrame(rows)
    for col in ('input', 'valid_AphiaID'):
        if col not in df.columns:
            df[col] = None
    df['valid_AphiaID'] = _as_aphiaid(df['valid_AphiaID'])
    return df


def _records_frame(rows):
    df = pd.DataFrame(rows)
    if 'AphiaID' not in df.columns:
        df['AphiaID'] = None
    df['AphiaID'] = _as_aphiaid(df['AphiaID'])
    return df


# =============================================================================
# BATCH EXECUTION
# =============================================================================

async def _gather_batches(client, batches, fetch, desc):
    pbar = tqdm(total=len(batches), desc=desc, unit="batch")

    async def run_one(session, index, batch):
        try:
            value = await fetch(session, batch)
            return BatchResult(batch=batch, value=value)
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            logger.warning(f"{desc}: batch {index + 1}/{len(batches)} ({len(batch)} items) failed - {reason}")
            return BatchResult(batch=batch, error=reason)
        finally:
            pbar.update(1)

    try:
        async with client.session() as session:
            tasks = [run_one(session, i, batch) for i, batch in enumerate(batches)]
            return await asyncio.gather(*tasks)
    finally:
        pbar.close()


def run_batches(batches, fetch, client, desc="WoRMS lookup") -> List[BatchResult]:
    """Run fetch(session, batch) for every batch; one BatchResult per batch, in batch order."""
    if not batches:
        return []
    return asyncio.run(_gather_batches(client, batches, fetch, desc))


def concat_results(results, columns):
    """Concatenate the tables of successful batches."""
    frames = [r.value for r in results if r.ok and r.value is not None and len(r.value)]
    failed = [r for r in results if not r.ok]
    if failed:
        n_items = sum(len(r.batch) for r in failed)
        logger.warning(f"{len(failed)}/{len(results)} batches failed; {n_items} items have no result")
    if not frames:
        return pd.DataFrame(columns=columns)
    return pd.concat(frames, ignore_index=True)


def match_names(names, client=None):
    """
    Match candidate names with WoRMS.

    Returns the concatenated match table (column `input` plus the WoRMS
    record fields, including `valid_AphiaID`). Names from failed batches are
    absent.
    """
    client = client or WormsClient()
    batches = make_batches(names)
    logger.info(f"Matching {len(names)} names with WoRMS in {len(batches)} batches")
    results = run_batches(batches, client.records_by_names, client, desc="WoRMS name matching")
    matched = concat_results(results, columns=['input', 'valid_AphiaID'])
    matched['valid_AphiaID'] = _as_aphiaid(matched['valid_AphiaID'])
    return matched


def fetch_accepted_taxa(aphia_ids, client=None):
    """Fetch each distinct accepted AphiaID once; returns one row per AphiaID."""
    client = client or WormsClient()
    ids = [int(i) for i in pd.unique(pd.Series(aphia_ids, dtype='object').dropna())]
    batches = make_batches(ids)
    logger.info(f"Fetching {len(ids)} accepted taxa from WoRMS in {len(batches)} batches")
    results = run_batches(batches, client.records_by_ids, client, desc="WoRMS accepted taxa")
    taxa = concat_results(results, columns=['AphiaID'])
    taxa['AphiaID'] = _as_aphiaid(taxa['AphiaID'])
    return taxa.dropna(subset=['AphiaID']).drop_duplicates(subset=['AphiaID']).reset_index(drop=True)
