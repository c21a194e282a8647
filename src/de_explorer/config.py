"""Report configuration.

Every field has a default and can be overridden by an environment variable
(``DE_EXPLORER_*``) or explicitly by the CLI / MCP layers.
"""

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Optional

DEFAULT_CACHE_DIR = Path.home() / ".de_explorer"

_TRUE_VALUES = {"1", "true", "yes", "on"}


def _env_path(name: str) -> Optional[Path]:
    value = os.environ.get(name)
    return Path(value) if value else None


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


@dataclass
class ReportConfig:
    """Where the dataset lives and how to analyse it.

    Attributes:
        counts_path: Count matrix (genes x samples).
        samples_path: Sample sheet with a ``group`` column.
        reference_dir: Directory with the gene length / category tables.
            Enrichment is unavailable when unset.
        cache_dir: Directory for downloaded annotation.
        genome: Reference genome build for enrichment.
        id_type: Gene identifier space (ensGene, knownGene, geneSymbol).
        de_method: "deseq2" or "welch_t".
        annotate: Resolve gene ids to symbols/descriptions via HGNC.
        group_column: Sample sheet column holding group labels.
        test_group: Numerator group (second group seen if None).
        reference_group: Denominator group (first group seen if None).
    """

    counts_path: Optional[Path] = None
    samples_path: Optional[Path] = None
    reference_dir: Optional[Path] = None
    cache_dir: Path = field(default_factory=lambda: DEFAULT_CACHE_DIR)
    genome: str = "hg19"
    id_type: str = "ensGene"
    de_method: str = "deseq2"
    annotate: bool = True
    group_column: str = "group"
    test_group: Optional[str] = None
    reference_group: Optional[str] = None

    @classmethod
    def from_env(cls, **overrides) -> "ReportConfig":
        """Build a config from ``DE_EXPLORER_*`` variables.

        Keyword overrides that are not None take precedence over the
        environment.
        """
        config = cls(
            counts_path=_env_path("DE_EXPLORER_COUNTS"),
            samples_path=_env_path("DE_EXPLORER_SAMPLES"),
            reference_dir=_env_path("DE_EXPLORER_REFERENCE_DIR"),
            cache_dir=_env_path("DE_EXPLORER_CACHE_DIR") or DEFAULT_CACHE_DIR,
            genome=os.environ.get("DE_EXPLORER_GENOME", "hg19"),
            id_type=os.environ.get("DE_EXPLORER_ID_TYPE", "ensGene"),
            de_method=os.environ.get("DE_EXPLORER_DE_METHOD", "deseq2"),
            annotate=_env_bool("DE_EXPLORER_ANNOTATE", True),
            group_column=os.environ.get("DE_EXPLORER_GROUP_COLUMN", "group"),
            test_group=os.environ.get("DE_EXPLORER_TEST_GROUP") or None,
            reference_group=os.environ.get("DE_EXPLORER_REFERENCE_GROUP") or None,
        )
        return config.with_overrides(**overrides)

    def with_overrides(self, **overrides) -> "ReportConfig":
        values = {k: v for k, v in overrides.items() if v is not None}
        for key in ("counts_path", "samples_path", "reference_dir", "cache_dir"):
            if key in values:
                values[key] = Path(values[key])
        return replace(self, **values)

    def validate(self) -> None:
        """Check that the dataset paths are set and exist.

        Raises:
            ValueError: naming the first missing input.
        """
        if self.counts_path is None:
            raise ValueError("No count matrix configured (set DE_EXPLORER_COUNTS or --counts)")
        if self.samples_path is None:
            raise ValueError("No sample sheet configured (set DE_EXPLORER_SAMPLES or --samples)")
        for path in (self.counts_path, self.samples_path):
            if not path.is_file():
                raise ValueError(f"File not found: {path}")
        if self.reference_dir is not None and not self.reference_dir.is_dir():
            raise ValueError(f"Reference directory not found: {self.reference_dir}")
