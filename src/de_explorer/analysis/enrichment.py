"""
Category enrichment with optional gene-length bias correction.

Longer transcripts collect more reads and are therefore more likely to be
called differentially expressed. The probability weighting function (PWF)
captures that trend: genes are binned by length, the DE rate per bin is
fitted with a monotone curve, and every gene gets the fitted probability
for its length as its weight.

Two category tests are provided:

* ``Wallenius``: Wallenius non-central hypergeometric distribution whose
  odds are the ratio of mean weights inside vs. outside the category. This
  is the length-bias corrected test.
* ``Hypergeometric``: the classical over-representation test, ignoring
  weights.

Example:
    reference = load_reference("reference/", genome="hg19", id_type="ensGene")
    backend = LengthBiasEnrichment(reference)
    weighting = backend.weigh(de_labels)
    table = backend.test(weighting, method="Wallenius")
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, Union

import numpy as np
import pandas as pd
from scipy import stats
from scipy.optimize import isotonic_regression

from ..errors import ComputationError
from .de_analysis import benjamini_hochberg
from .de_result import GENE_ID

logger = logging.getLogger(__name__)

WALLENIUS = "Wallenius"
HYPERGEOMETRIC = "Hypergeometric"
ENRICHMENT_METHODS = (WALLENIUS, HYPERGEOMETRIC)

# Fixed output schema of every enrichment table
CATEGORY = "category"
OVER_PVALUE = "over_represented_pvalue"
UNDER_PVALUE = "under_represented_pvalue"
NUM_DE_IN_CAT = "num_de_in_cat"
NUM_IN_CAT = "num_in_cat"
TERM = "term"
ONTOLOGY = "ontology"
OVER_FDR = "over_represented_fdr"

ENRICHMENT_COLUMNS = [
    CATEGORY,
    OVER_PVALUE,
    UNDER_PVALUE,
    NUM_DE_IN_CAT,
    NUM_IN_CAT,
    TERM,
    ONTOLOGY,
]

# Column spellings produced by other enrichment tools -> fixed schema
_COLUMN_ALIASES = {
    "numDEInCat": NUM_DE_IN_CAT,
    "numInCat": NUM_IN_CAT,
    "num_de": NUM_DE_IN_CAT,
    "term_size": NUM_IN_CAT,
    "category_id": CATEGORY,
    "term_id": CATEGORY,
    "term_name": TERM,
    "source": ONTOLOGY,
}


def method_for(length_bias: bool) -> str:
    """Category test used for the given length-bias option."""
    return WALLENIUS if length_bias else HYPERGEOMETRIC


@dataclass
class EnrichmentConfig:
    """
    Configuration for enrichment analysis.

    Attributes:
        genome: Reference genome build of the length/category tables.
        id_type: Identifier space of the gene ids (e.g. ensGene).
        bin_size: Genes per length bin when fitting the PWF.
        min_weight: Floor applied to fitted weights so odds stay finite.
    """

    genome: str = "hg19"
    id_type: str = "ensGene"
    bin_size: int = 200
    min_weight: float = 1e-6

    def __post_init__(self):
        if self.bin_size < 1:
            raise ValueError("bin_size must be >= 1")
        if not 0 < self.min_weight < 1:
            raise ValueError("min_weight must be in (0, 1)")


@dataclass
class ReferenceAnnotation:
    """
    Gene lengths and gene-to-category membership for one genome/id space.

    Attributes:
        lengths: Median transcript length per gene id.
        categories: One row per (gene_id, category) membership.
        terms: Per category: ``term`` label and ``ontology`` branch.
    """

    genome: str
    id_type: str
    lengths: pd.Series
    categories: pd.DataFrame
    terms: pd.DataFrame = field(default_factory=pd.DataFrame)

    @property
    def n_genes(self) -> int:
        return len(self.lengths)

    @property
    def n_categories(self) -> int:
        return int(self.categories[CATEGORY].nunique())


def load_reference(
    directory: Union[str, Path],
    genome: str = "hg19",
    id_type: str = "ensGene",
) -> ReferenceAnnotation:
    """
    Load ``<genome>.<id_type>.lengths.tsv`` and ``.categories.tsv``.

    The lengths file has columns ``gene_id`` and ``length``. The categories
    file has ``gene_id``, ``category`` and optionally ``term`` and
    ``ontology``.

    Raises:
        ComputationError: if either file is missing or malformed.
    """
    directory = Path(directory)
    lengths_path = directory / f"{genome}.{id_type}.lengths.tsv"
    categories_path = directory / f"{genome}.{id_type}.categories.tsv"

    for path in (lengths_path, categories_path):
        if not path.is_file():
            raise ComputationError("enrichment", f"Reference file not found: {path}")

    lengths = pd.read_csv(lengths_path, sep="\t", dtype={GENE_ID: str})
    categories = pd.read_csv(categories_path, sep="\t", dtype=str)

    if not {GENE_ID, "length"} <= set(lengths.columns):
        raise ComputationError(
            "enrichment", f"{lengths_path} needs columns gene_id and length"
        )
    if not {GENE_ID, CATEGORY} <= set(categories.columns):
        raise ComputationError(
            "enrichment", f"{categories_path} needs columns gene_id and category"
        )

    for column in (TERM, ONTOLOGY):
        if column not in categories.columns:
            categories[column] = None
    terms = (
        categories[[CATEGORY, TERM, ONTOLOGY]]
        .drop_duplicates(subset=CATEGORY)
        .set_index(CATEGORY)
    )

    reference = ReferenceAnnotation(
        genome=genome,
        id_type=id_type,
        lengths=lengths.set_index(GENE_ID)["length"].astype(float),
        categories=categories[[GENE_ID, CATEGORY]].drop_duplicates(),
        terms=terms,
    )
    logger.info(
        "Loaded reference %s/%s: %d gene lengths, %d categories",
        genome,
        id_type,
        reference.n_genes,
        reference.n_categories,
    )
    return reference


@dataclass
class WeightingResult:
    """
    Output of the probability weighting step.

    Attributes:
        weights: Indexed by gene id; columns ``de`` (0/1), ``bias_data``
            (gene length, NaN when unknown) and ``pwf`` (fitted weight).
        bias_plot: One row per length bin: ``length`` (mean bin length),
            ``proportion_de`` and ``fitted``.
    """

    weights: pd.DataFrame
    bias_plot: pd.DataFrame


def probability_weighting(
    labels: pd.Series,
    lengths: pd.Series,
    bin_size: int = 200,
    min_weight: float = 1e-6,
) -> WeightingResult:
    """
    Fit the probability of a gene being DE as a monotone function of length.

    Args:
        labels: 0/1 DE indicator keyed by gene id.
        lengths: Gene length keyed by gene id.
        bin_size: Genes per bin.
        min_weight: Lower bound on fitted weights.

    Raises:
        ValueError: if the labels are all 0 or all 1, or no labelled gene has
            a known length.
    """
    labels = labels.astype(int)
    n_de = int(labels.sum())
    if n_de == 0 or n_de == len(labels):
        raise ValueError(
            f"Label vector is degenerate ({n_de} of {len(labels)} genes DE); "
            "need both DE and non-DE genes"
        )

    bias_data = lengths.reindex(labels.index).astype(float)
    known = bias_data.notna()
    if not known.any():
        raise ValueError(
            "None of the gene identifiers were found in the reference lengths; "
            "check the genome and identifier space"
        )
    if not known.all():
        logger.warning(
            "%d of %d genes have no length in the reference; they get the median weight",
            int((~known).sum()),
            len(labels),
        )

    ordered = pd.DataFrame({"de": labels[known], "length": bias_data[known]})
    ordered = ordered.sort_values("length", kind="mergesort")
    ordered["bin"] = np.arange(len(ordered)) // bin_size

    bins = ordered.groupby("bin").agg(
        length=("length", "mean"),
        proportion_de=("de", "mean"),
        n=("de", "size"),
    )

    increasing = True
    if len(bins) > 1:
        rho, _ = stats.spearmanr(bins["length"], bins["proportion_de"])
        increasing = bool(np.isnan(rho) or rho >= 0)
    fit = isotonic_regression(
        bins["proportion_de"].to_numpy(dtype=float),
        weights=bins["n"].to_numpy(dtype=float),
        increasing=increasing,
    )
    bins["fitted"] = np.clip(fit.x, min_weight, 1.0)

    log_length = np.log10(bins["length"].clip(lower=1.0).to_numpy())
    pwf = pd.Series(np.nan, index=labels.index)
    pwf[known] = np.interp(
        np.log10(bias_data[known].clip(lower=1.0).to_numpy()),
        log_length,
        bins["fitted"].to_numpy(),
    )
    pwf[~known] = float(np.median(pwf[known]))

    weights = pd.DataFrame({"de": labels, "bias_data": bias_data, "pwf": pwf})
    weights.index.name = GENE_ID
    bias_plot = bins[["length", "proportion_de", "fitted"]].reset_index(drop=True)
    return WeightingResult(weights=weights, bias_plot=bias_plot)


def category_test(
    weights: pd.DataFrame,
    reference: ReferenceAnnotation,
    method: str = WALLENIUS,
) -> pd.DataFrame:
    """
    Test every category for over- and under-representation of DE genes.

    Only genes with at least one category take part, as the population and
    the DE count are both restricted to categorised genes.

    Returns:
        DataFrame in the fixed enrichment schema, sorted by over-represented
        p-value, plus a BH-adjusted ``over_represented_fdr`` column.

    Raises:
        ValueError: on an unknown method or when no tested gene has a
            category.
    """
    if method not in ENRICHMENT_METHODS:
        raise ValueError(
            f"Unknown enrichment method {method!r}. Use one of: {', '.join(ENRICHMENT_METHODS)}"
        )

    membership = reference.categories[
        reference.categories[GENE_ID].isin(weights.index)
    ]
    if membership.empty:
        raise ValueError("No tested gene belongs to any reference category")

    population = weights.loc[membership[GENE_ID].unique()]
    total = len(population)
    total_de = int(population["de"].sum())

    membership = membership.join(population[["de", "pwf"]], on=GENE_ID)
    per_category = membership.groupby(CATEGORY).agg(
        num_de_in_cat=("de", "sum"),
        num_in_cat=("de", "size"),
        pwf_in=("pwf", "sum"),
    )

    k = per_category[NUM_DE_IN_CAT].to_numpy(dtype=int)
    m = per_category[NUM_IN_CAT].to_numpy(dtype=int)

    if method == HYPERGEOMETRIC:
        over = stats.hypergeom.sf(k - 1, total, m, total_de)
        under = stats.hypergeom.cdf(k, total, m, total_de)
    else:
        pwf_total = float(population["pwf"].sum())
        mean_in = per_category["pwf_in"].to_numpy() / m
        outside = total - m
        with np.errstate(divide="ignore", invalid="ignore"):
            mean_out = np.where(
                outside > 0,
                (pwf_total - per_category["pwf_in"].to_numpy()) / np.maximum(outside, 1),
                mean_in,
            )
            odds = np.where(mean_out > 0, mean_in / mean_out, 1.0)
        over = stats.nchypergeom_wallenius.sf(k - 1, total, m, total_de, odds)
        under = stats.nchypergeom_wallenius.cdf(k, total, m, total_de, odds)

    table = pd.DataFrame(
        {
            CATEGORY: per_category.index.astype(str),
            OVER_PVALUE: np.clip(over, 0.0, 1.0),
            UNDER_PVALUE: np.clip(under, 0.0, 1.0),
            NUM_DE_IN_CAT: k,
            NUM_IN_CAT: m,
        }
    )
    if not reference.terms.empty:
        table = table.join(reference.terms[[TERM, ONTOLOGY]], on=CATEGORY)
    table = normalize_enrichment_columns(table)
    table = table.sort_values(OVER_PVALUE, kind="mergesort").reset_index(drop=True)
    table[OVER_FDR] = benjamini_hochberg(table[OVER_PVALUE].to_numpy())
    return table


def normalize_enrichment_columns(table: pd.DataFrame) -> pd.DataFrame:
    """Rename known column spellings and order columns to the fixed schema.

    Missing schema columns are added as empty; extra columns are kept after
    the schema columns.
    """
    table = table.rename(
        columns={k: v for k, v in _COLUMN_ALIASES.items() if k in table.columns}
    )
    for column in ENRICHMENT_COLUMNS:
        if column not in table.columns:
            table[column] = None
    extras = [c for c in table.columns if c not in ENRICHMENT_COLUMNS]
    return table[ENRICHMENT_COLUMNS + extras]


class EnrichmentBackend(Protocol):
    """Protocol for weighting + enrichment backends used by the report."""

    def weigh(self, labels: pd.Series) -> WeightingResult:
        """Compute per-gene bias-correction weights from 0/1 DE labels."""
        ...

    def test(self, weighting: WeightingResult, method: str) -> pd.DataFrame:
        """Run the category test with the given method."""
        ...


class LengthBiasEnrichment:
    """
    Default enrichment backend: length PWF plus Wallenius/hypergeometric.

    Example:
        backend = LengthBiasEnrichment(reference)
        weighting = backend.weigh(labels)
        table = backend.test(weighting, method_for(length_bias=True))
    """

    def __init__(
        self,
        reference: ReferenceAnnotation,
        config: Optional[EnrichmentConfig] = None,
    ):
        self.reference = reference
        self.config = config or EnrichmentConfig(
            genome=reference.genome, id_type=reference.id_type
        )
        if (self.config.genome, self.config.id_type) != (reference.genome, reference.id_type):
            raise ValueError(
                f"Reference is {reference.genome}/{reference.id_type} but config "
                f"asks for {self.config.genome}/{self.config.id_type}"
            )

    def weigh(self, labels: pd.Series) -> WeightingResult:
        return probability_weighting(
            labels,
            self.reference.lengths,
            bin_size=self.config.bin_size,
            min_weight=self.config.min_weight,
        )

    def test(self, weighting: WeightingResult, method: str) -> pd.DataFrame:
        logger.info(
            "Running %s category test on %d genes (%d DE)",
            method,
            len(weighting.weights),
            int(weighting.weights["de"].sum()),
        )
        return category_test(weighting.weights, self.reference, method=method)
