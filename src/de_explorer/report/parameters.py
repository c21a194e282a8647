"""
User-editable parameters and the commit counters that gate recomputation.

The store holds two kinds of state:

* live values, edited freely by the presentation layer, and
* one commit counter per gated stage, together with the parameter values
  frozen at the moment of the last commit.

Stages never read live values. They ask for ``committed(stage)`` and get the
counter plus the snapshot taken when that counter was last advanced, so
editing several thresholds and committing once produces exactly one
recomputation, and editing a parameter of one stage never disturbs another.
"""

import logging
from dataclasses import asdict, dataclass, fields
from typing import Any, Callable, Dict, NamedTuple, Optional, Tuple, Union

from ..errors import ParameterError

logger = logging.getLogger(__name__)

CLASSIFICATION = "classification"
ENRICHMENT = "enrichment"
STAGES = (CLASSIFICATION, ENRICHMENT)

MAX_FDR_THRESHOLD = 0.25

_TRUE_WORDS = {"yes", "y", "true", "t", "1", "on"}
_FALSE_WORDS = {"no", "n", "false", "f", "0", "off"}


def _to_float(name: str, value: Any) -> float:
    try:
        result = float(value)
    except (TypeError, ValueError):
        raise ParameterError(f"{name} must be a number, got {value!r}") from None
    if result != result:  # NaN
        raise ParameterError(f"{name} must not be NaN")
    return result


def _to_bool(name: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    word = str(value).strip().lower()
    if word in _TRUE_WORDS:
        return True
    if word in _FALSE_WORDS:
        return False
    raise ParameterError(f"{name} must be yes/no, got {value!r}")


@dataclass(frozen=True)
class ThresholdParameters:
    """Thresholds used by the classification stage.

    Attributes:
        fdr: Adjusted p-value cutoff, in (0, 0.25].
        logfc: Absolute log2 fold-change cutoff, >= 0.
        logcpm: Mean log2 CPM cutoff, >= 0.
    """

    fdr: float = 0.05
    logfc: float = 1.0
    logcpm: float = 0.0

    def __post_init__(self):
        if not 0.0 < self.fdr <= MAX_FDR_THRESHOLD:
            raise ParameterError(
                f"fdr must be in (0, {MAX_FDR_THRESHOLD}], got {self.fdr}"
            )
        if self.logfc < 0:
            raise ParameterError(f"logfc must be >= 0, got {self.logfc}")
        if self.logcpm < 0:
            raise ParameterError(f"logcpm must be >= 0, got {self.logcpm}")


@dataclass(frozen=True)
class EnrichmentParameters:
    """Options for the enrichment stage."""

    length_bias: bool = True


ParameterSnapshot = Union[ThresholdParameters, EnrichmentParameters]

# name -> (owning stage, coercion)
PARAMETERS: Dict[str, Tuple[str, Callable[[str, Any], Any]]] = {
    "fdr": (CLASSIFICATION, _to_float),
    "logfc": (CLASSIFICATION, _to_float),
    "logcpm": (CLASSIFICATION, _to_float),
    "length_bias": (ENRICHMENT, _to_bool),
}

_SNAPSHOT_TYPES = {
    CLASSIFICATION: ThresholdParameters,
    ENRICHMENT: EnrichmentParameters,
}


class Committed(NamedTuple):
    """A stage's view of the store: counter value and frozen parameters."""

    counter: int
    params: ParameterSnapshot


class ParameterStore:
    """Live parameter values plus one commit counter per gated stage.

    Example:
        store = ParameterStore()
        store.set("fdr", 0.01)
        store.set("logfc", 2)
        store.commit("classification")   # one recomputation, both edits
        store.committed("classification")
        # Committed(counter=1, params=ThresholdParameters(fdr=0.01, ...))
    """

    def __init__(
        self,
        thresholds: Optional[ThresholdParameters] = None,
        enrichment: Optional[EnrichmentParameters] = None,
    ):
        thresholds = thresholds or ThresholdParameters()
        enrichment = enrichment or EnrichmentParameters()

        self._live: Dict[str, Any] = {**asdict(thresholds), **asdict(enrichment)}
        self._counters: Dict[str, int] = {stage: 0 for stage in STAGES}
        # Counter 0 snapshot is the set of initial values.
        self._committed: Dict[str, ParameterSnapshot] = {
            CLASSIFICATION: thresholds,
            ENRICHMENT: enrichment,
        }

    # -----------------------------------------------------------------
    # Live values
    # -----------------------------------------------------------------

    @property
    def live(self) -> Dict[str, Any]:
        """Copy of the current (possibly uncommitted) values."""
        return dict(self._live)

    def get(self, name: str) -> Any:
        self._check_name(name)
        return self._live[name]

    def set(self, name: str, value: Any) -> None:
        """Set one live value, rejecting anything outside its domain."""
        self.update(**{name: value})

    def update(self, **values: Any) -> None:
        """Set several live values at once.

        Either every value is accepted or none is: the candidate values are
        validated as a whole snapshot before any of them becomes live.
        """
        candidate = dict(self._live)
        for name, value in values.items():
            self._check_name(name)
            _, coerce = PARAMETERS[name]
            candidate[name] = coerce(name, value)

        touched = {PARAMETERS[name][0] for name in values}
        for stage in touched:
            self._build_snapshot(stage, candidate)

        self._live = candidate
        logger.debug("Live parameters updated: %s", values)

    # -----------------------------------------------------------------
    # Commits
    # -----------------------------------------------------------------

    def counter(self, stage: str) -> int:
        self._check_stage(stage)
        return self._counters[stage]

    def commit(self, stage: str) -> int:
        """Advance ``stage``'s counter by one and freeze its parameters.

        Returns:
            The new counter value.
        """
        self._check_stage(stage)
        snapshot = self._build_snapshot(stage, self._live)
        self._counters[stage] += 1
        self._committed[stage] = snapshot
        logger.info(
            "Committed %s #%d: %s", stage, self._counters[stage], snapshot
        )
        return self._counters[stage]

    def committed(self, stage: str) -> Committed:
        """Counter value and the parameters frozen at that commit."""
        self._check_stage(stage)
        return Committed(self._counters[stage], self._committed[stage])

    def pending(self, stage: str) -> bool:
        """True when live values differ from the last committed snapshot."""
        self._check_stage(stage)
        committed = asdict(self._committed[stage])
        return any(self._live[name] != value for name, value in committed.items())

    # -----------------------------------------------------------------
    # Internal
    # -----------------------------------------------------------------

    @staticmethod
    def _build_snapshot(stage: str, values: Dict[str, Any]) -> ParameterSnapshot:
        cls = _SNAPSHOT_TYPES[stage]
        return cls(**{f.name: values[f.name] for f in fields(cls)})

    @staticmethod
    def _check_name(name: str) -> None:
        if name not in PARAMETERS:
            raise ParameterError(
                f"Unknown parameter {name!r}. Known: {', '.join(PARAMETERS)}"
            )

    @staticmethod
    def _check_stage(stage: str) -> None:
        if stage not in STAGES:
            raise ParameterError(
                f"Unknown stage {stage!r}. Known: {', '.join(STAGES)}"
            )
