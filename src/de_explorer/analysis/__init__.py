"""Data loading, differential expression, annotation and category enrichment.

Everything here is computed from inputs passed in explicitly; no module
holds report state.
"""

from de_explorer.analysis.annotation import (
    HGNCAnnotationResolver,
    StaticAnnotationResolver,
    collapse_annotations,
)
from de_explorer.analysis.de_analysis import (
    DEConfig,
    DifferentialExpressionEngine,
    benjamini_hochberg,
    build_base_statistics,
)
from de_explorer.analysis.de_result import BaseStatistics, DEProvenance, GeneRecord, Status
from de_explorer.analysis.enrichment import (
    EnrichmentConfig,
    LengthBiasEnrichment,
    ReferenceAnnotation,
    load_reference,
)
from de_explorer.analysis.loader import CountData, load_counts

__all__ = [
    "BaseStatistics",
    "CountData",
    "DEConfig",
    "DEProvenance",
    "DifferentialExpressionEngine",
    "EnrichmentConfig",
    "GeneRecord",
    "HGNCAnnotationResolver",
    "LengthBiasEnrichment",
    "ReferenceAnnotation",
    "StaticAnnotationResolver",
    "Status",
    "benjamini_hochberg",
    "build_base_statistics",
    "collapse_annotations",
    "load_counts",
    "load_reference",
]
