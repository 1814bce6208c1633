"""
Pytest fixtures for ednagaps tests.

Provides reference database taxon tables and a WoRMS client that answers
from canned records instead of the remote service.
"""
import aiohttp
import pytest

from ednagaps.worms import WormsClient


def aphia_record(aphia_id, name, rank="Species", valid_id=None, **extra):
    """Minimal AphiaRecord as returned by the WoRMS REST service."""
    genus = name.split()[0]
    record = {
        "AphiaID": aphia_id,
        "scientificname": name,
        "status": "accepted" if valid_id in (None, aphia_id) else "unaccepted",
        "rank": rank,
        "valid_AphiaID": aphia_id if valid_id is None else valid_id,
        "valid_name": name,
        "kingdom": "Animalia",
        "phylum": "Chordata",
        "class": "Teleostei",
        "order": "Gadiformes",
        "family": "Gadidae",
        "genus": genus,
        "isMarine": 1,
        "isBrackish": 0,
        "isFreshwater": 0,
        "isTerrestrial": 0,
    }
    record.update(extra)
    return record


GADUS_MORHUA = aphia_record(126436, "Gadus morhua")
MELANOGRAMMUS = aphia_record(126437, "Melanogrammus aeglefinus")
POLLACHIUS_SYNONYM = aphia_record(999001, "Gadus virens", valid_id=126441)
POLLACHIUS_VIRENS = aphia_record(126441, "Pollachius virens")
GADIDAE = aphia_record(125469, "Gadidae", rank="Family")


class FakeWormsClient(WormsClient):
    """WormsClient serving canned JSON; names in `failing` make their batch fail."""

    def __init__(self, names=None, records=None, failing=(), failing_ids=()):
        super().__init__(base_url="http://worms.invalid/rest", max_concurrent=2, rate_limit=0, timeout=5)
        self.names = names or {}
        self.records = records or {}
        self.failing = set(failing)
        self.failing_ids = set(failing_ids)
        self.calls = []

    async def _get_json(self, session, endpoint, params):
        values = [value for key, value in params if key.endswith("[]")]
        self.calls.append((endpoint, values))
        if endpoint == "AphiaRecordsByNames":
            if self.failing.intersection(values):
                raise aiohttp.ClientError("connection reset")
            return [self.names.get(name, []) for name in values]
        if endpoint == "AphiaRecordsByAphiaIDs":
            if self.failing_ids.intersection(int(v) for v in values):
                raise aiohttp.ClientError("service unavailable")
            return [self.records.get(int(v)) for v in values]
        raise AssertionError(f"unexpected endpoint {endpoint}")


@pytest.fixture
def worms_client():
    names = {
        "Gadus morhua": [GADUS_MORHUA],
        "Melanogrammus aeglefinus": [MELANOGRAMMUS],
        "Gadus virens": [POLLACHIUS_SYNONYM, GADUS_MORHUA],
        "Gadidae": [GADIDAE],
    }
    records = {r["AphiaID"]: r for r in (GADUS_MORHUA, MELANOGRAMMUS, POLLACHIUS_VIRENS, GADIDAE)}
    return FakeWormsClient(names=names, records=records)


@pytest.fixture
def write_table(tmp_path):
    """Write lines as a tab separated file and return its path."""
    def _write(name, rows):
        path = tmp_path / name
        path.write_text("".join("\t".join(row) + "\n" for row in rows))
        return path
    return _write


@pytest.fixture
def coi_table(write_table):
    return write_table("coi_taxa.tsv", [
        ["seq1", "8049", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Gadus", "Gadus_morhua", "ACGTACGTAC"],
        ["seq2", "8049", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Gadus", "Gadus_morhua", "ACGTACGTAA"],
        ["seq3", "8055", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Gadus", "Gadus_virens"],
        ["seq4", "9606", "Animalia", "Chordata", "Mammalia", "Primates", "Hominidae", "Homo", "Homo_sapiens", "TTTTTTTTTT"],
        ["seq5", "nan", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Gadus", "Gadus_sp.", "ACGTTTTTAC"],
        ["seq6", "8056", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "", "Gadidae"],
    ])


@pytest.fixture
def twelve_s_table(write_table):
    return write_table("12s_taxa.tsv", [
        ["a1", "8050", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Melanogrammus",
         "Melanogrammus_aeglefinus", "GGGGCCCCAA"],
        ["a2", "8049", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Gadus", "Gadus_morhua",
         "GGGGCCCCTT"],
        ["a3", "7000", "Animalia", "Chordata", "Teleostei", "Gadiformes", "Gadidae", "Gadus", "Gadus_cf._ogac",
         "GGGGCCCCGG"],
    ])
