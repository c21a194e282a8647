"""Gene annotation: identifier -> (symbol, description) pairs.

The HGNC resolver downloads the HGNC complete gene set on first use and
caches the columns it needs locally. An identifier can map to several HGNC
records (and most often to none, for non-coding or retired ids);
:func:`annotate_table` collapses the matches into comma-joined strings and
leaves unmatched genes in place with empty annotation fields.
"""

import logging
import os
import time
from io import StringIO
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple

import pandas as pd
import requests

from ..config import DEFAULT_CACHE_DIR
from .de_result import DESCRIPTION, GENE_ID, SYMBOL

logger = logging.getLogger(__name__)

# HGNC complete set download URL (TSV)
HGNC_DOWNLOAD_URL = (
    "https://ftp.ebi.ac.uk/pub/databases/genenames/hgnc/tsv/hgnc_complete_set.txt"
)

# Cache expiry: 30 days in seconds
CACHE_MAX_AGE_SECONDS = 30 * 24 * 60 * 60

# Identifier spaces understood by the HGNC resolver -> HGNC column
HGNC_ID_COLUMNS = {
    "ensGene": "ensembl_gene_id",
    "knownGene": "entrez_id",
    "geneSymbol": "symbol",
}

Annotation = Tuple[str, str]


class AnnotationResolver(Protocol):
    """Protocol for annotation sources."""

    name: str

    def resolve(self, gene_ids: Iterable[str]) -> Dict[str, List[Annotation]]:
        """
        Look up annotations for gene identifiers.

        Returns:
            Dict mapping each identifier to zero or more (symbol, description)
            pairs. Identifiers without matches may be absent or map to [].
        """
        ...


class StaticAnnotationResolver:
    """Resolver backed by an in-memory mapping."""

    name = "static"

    def __init__(self, mapping: Mapping[str, Sequence[Annotation]]):
        self._mapping = {k: list(v) for k, v in mapping.items()}

    def resolve(self, gene_ids: Iterable[str]) -> Dict[str, List[Annotation]]:
        return {gid: self._mapping.get(gid, []) for gid in gene_ids}


class HGNCAnnotationResolver:
    """Resolves gene identifiers against a local HGNC cache.

    The cache is refreshed if it is older than 30 days. When the download
    fails, a stale cache is used if present; otherwise genes are left
    unannotated.

    Args:
        id_type: Identifier space of the dataset (``ensGene``, ``knownGene``
            or ``geneSymbol``).
        cache_path: Path to the cache file. Defaults to
            ``~/.de_explorer/hgnc_<id_type>.tsv``, overridable via the
            ``HGNC_CACHE_PATH`` environment variable.
        session: Optional requests session (for retries or testing).
    """

    name = "hgnc"

    def __init__(
        self,
        id_type: str = "ensGene",
        cache_path: Optional[Path] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if id_type not in HGNC_ID_COLUMNS:
            raise ValueError(
                f"Unsupported identifier space {id_type!r}. "
                f"Use one of: {', '.join(HGNC_ID_COLUMNS)}"
            )
        self.id_type = id_type
        self._id_column = HGNC_ID_COLUMNS[id_type]

        if cache_path is not None:
            self._cache_path = Path(cache_path)
        else:
            env_path = os.environ.get("HGNC_CACHE_PATH")
            if env_path:
                self._cache_path = Path(env_path)
            else:
                self._cache_path = DEFAULT_CACHE_DIR / f"hgnc_{id_type}.tsv"

        self._session = session or requests.Session()
        self._table: Optional[pd.DataFrame] = None

    # -----------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------

    def resolve(self, gene_ids: Iterable[str]) -> Dict[str, List[Annotation]]:
        table = self.get_table()
        wanted = {gid: _strip_version(gid) for gid in gene_ids}
        subset = table[table["key"].isin(set(wanted.values()))]

        by_key: Dict[str, List[Annotation]] = {}
        for key, symbol, description in subset.itertuples(index=False):
            by_key.setdefault(key, []).append((symbol, description))
        return {gid: by_key.get(key, []) for gid, key in wanted.items()}

    def get_table(self) -> pd.DataFrame:
        """Return the (key, symbol, description) table, loading it if needed."""
        if self._table is None:
            self._table = self._load_or_download()
        return self._table

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    def _load_or_download(self) -> pd.DataFrame:
        """Load the table from cache, downloading if stale or missing."""
        if self._cache_is_valid():
            logger.info("Loading HGNC annotation from cache: %s", self._cache_path)
            return self._read_cache()

        logger.info("Downloading HGNC complete gene set...")
        try:
            table = self._download_and_parse()
            self._write_cache(table)
            logger.info(
                "Cached %d HGNC annotations keyed by %s to %s",
                len(table),
                self._id_column,
                self._cache_path,
            )
            return table
        except (requests.RequestException, OSError, ValueError) as exc:
            logger.warning(
                "Failed to download HGNC data: %s. Genes will not be annotated.",
                exc,
            )
            if self._cache_path.exists():
                logger.info("Falling back to stale cache")
                return self._read_cache()
            return pd.DataFrame(columns=["key", "symbol", "description"])

    def _cache_is_valid(self) -> bool:
        """Check if the cache file exists and is fresh enough."""
        if not self._cache_path.exists():
            return False
        age = time.time() - self._cache_path.stat().st_mtime
        return age < CACHE_MAX_AGE_SECONDS

    def _download_and_parse(self) -> pd.DataFrame:
        """Download the HGNC TSV and keep key, symbol and name."""
        resp = self._session.get(HGNC_DOWNLOAD_URL, timeout=120)
        resp.raise_for_status()

        raw = pd.read_csv(StringIO(resp.text), sep="\t", dtype=str)
        missing = {self._id_column, "symbol", "name"} - set(raw.columns)
        if missing:
            raise ValueError(f"HGNC file is missing columns: {sorted(missing)}")

        table = raw[[self._id_column, "symbol", "name"]].dropna(
            subset=[self._id_column, "symbol"]
        )
        table.columns = ["key", "symbol", "description"]
        table["key"] = table["key"].str.strip()
        table["description"] = table["description"].fillna("")
        return table.reset_index(drop=True)

    def _read_cache(self) -> pd.DataFrame:
        return pd.read_csv(self._cache_path, sep="\t", dtype=str, keep_default_na=False)

    def _write_cache(self, table: pd.DataFrame) -> None:
        self._cache_path.parent.mkdir(parents=True, exist_ok=True)
        table.to_csv(self._cache_path, sep="\t", index=False)


def _strip_version(gene_id: str) -> str:
    """ENSG00000141510.16 -> ENSG00000141510."""
    if gene_id.startswith("ENS") and "." in gene_id:
        return gene_id.split(".", 1)[0]
    return gene_id


def _collapse(values: Iterable[str]) -> Optional[str]:
    kept = [v for v in dict.fromkeys(values) if v]
    return ",".join(kept) if kept else None


def collapse_annotations(matches: Sequence[Annotation]) -> Tuple[Optional[str], Optional[str]]:
    """Collapse several (symbol, description) pairs into two strings.

    Order is preserved and repeated values are dropped, so
    ``[("TP53", "tumor protein p53"), ("TP53B", "...")]`` gives
    ``("TP53,TP53B", "tumor protein p53,...")``. No matches gives
    ``(None, None)``.
    """
    if not matches:
        return None, None
    symbols, descriptions = zip(*matches)
    return _collapse(symbols), _collapse(descriptions)


def annotate_table(frame: pd.DataFrame, resolver: AnnotationResolver) -> pd.DataFrame:
    """Add ``symbol`` and ``description`` columns to a statistics frame.

    Every input row is kept; genes without matches get None in both fields.
    """
    gene_ids = frame[GENE_ID].astype(str).tolist()
    matches = resolver.resolve(gene_ids)

    collapsed = [collapse_annotations(matches.get(gid, [])) for gid in gene_ids]
    annotated = frame.copy()
    annotated[SYMBOL] = [symbol for symbol, _ in collapsed]
    annotated[DESCRIPTION] = [description for _, description in collapsed]

    n_found = sum(1 for symbol, _ in collapsed if symbol is not None)
    logger.info(
        "Annotated %d of %d genes using %s", n_found, len(gene_ids), resolver.name
    )
    return annotated
