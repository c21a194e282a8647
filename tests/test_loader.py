"""Tests for count matrix and sample sheet loading."""

import pandas as pd
import pytest

from de_explorer.analysis.loader import CountData, load_counts
from de_explorer.errors import ComputationError

COUNTS_TSV = (
    "gene_id\tS1\tS2\tS3\tS4\n"
    "ENSG01\t10\t12\t30\t33\n"
    "ENSG02\t0\t1\t5\t4\n"
    "ENSG03\t100\t90\t95\t105\n"
)

SAMPLES_TSV = (
    "sample\tgroup\n"
    "S1\tcontrol\n"
    "S2\tcontrol\n"
    "S3\ttreated\n"
    "S4\ttreated\n"
)


@pytest.fixture
def files(tmp_path):
    counts = tmp_path / "counts.tsv"
    samples = tmp_path / "samples.tsv"
    counts.write_text(COUNTS_TSV)
    samples.write_text(SAMPLES_TSV)
    return counts, samples


class TestLoadCounts:

    def test_loads_tsv(self, files):
        data = load_counts(*files)

        assert data.counts.shape == (3, 4)
        assert data.counts.index.name == "gene_id"
        assert data.counts.loc["ENSG01", "S3"] == 30
        assert data.reference_group == "control"
        assert data.test_group == "treated"
        assert data.test_samples == ["S3", "S4"]
        assert data.reference_samples == ["S1", "S2"]

    def test_loads_csv(self, tmp_path):
        counts = tmp_path / "counts.csv"
        samples = tmp_path / "samples.csv"
        counts.write_text(COUNTS_TSV.replace("\t", ","))
        samples.write_text(SAMPLES_TSV.replace("\t", ","))

        assert load_counts(counts, samples).counts.shape == (3, 4)

    def test_explicit_groups(self, files):
        data = load_counts(*files, test_group="control", reference_group="treated")
        assert data.test_samples == ["S1", "S2"]

    def test_custom_group_column(self, tmp_path, files):
        counts, _ = files
        samples = tmp_path / "sheet.tsv"
        samples.write_text(SAMPLES_TSV.replace("group", "condition"))
        data = load_counts(counts, samples, group_column="condition")
        assert data.test_group == "treated"

    def test_missing_group_column(self, files):
        with pytest.raises(ComputationError, match="no 'condition' column"):
            load_counts(*files, group_column="condition")

    def test_missing_file(self, tmp_path, files):
        with pytest.raises(ComputationError) as excinfo:
            load_counts(tmp_path / "nope.tsv", files[1])
        assert excinfo.value.stage == "load"


class TestCountDataValidation:

    def _groups(self, *labels):
        return pd.Series(labels, index=[f"S{i + 1}" for i in range(len(labels))])

    def _counts(self, rows, n_samples=4):
        return pd.DataFrame(
            rows,
            index=[f"g{i}" for i in range(len(rows))],
            columns=[f"S{i + 1}" for i in range(n_samples)],
        )

    def test_negative_counts(self):
        counts = self._counts([[1, 2, -3, 4]])
        with pytest.raises(ComputationError, match="negative"):
            CountData.from_frames(counts, self._groups("a", "a", "b", "b"))

    def test_non_numeric_counts(self):
        counts = self._counts([[1, 2, "x", 4]])
        with pytest.raises(ComputationError, match="non-numeric"):
            CountData.from_frames(counts, self._groups("a", "a", "b", "b"))

    def test_three_groups(self):
        counts = self._counts([[1, 2, 3, 4]])
        with pytest.raises(ComputationError, match="exactly two"):
            CountData.from_frames(counts, self._groups("a", "b", "c", "c"))

    def test_sample_without_group(self):
        counts = self._counts([[1, 2, 3, 4]])
        with pytest.raises(ComputationError, match="S4"):
            CountData.from_frames(counts, self._groups("a", "a", "b"))

    def test_duplicate_genes(self):
        counts = self._counts([[1, 2, 3, 4], [5, 6, 7, 8]])
        counts.index = ["g1", "g1"]
        with pytest.raises(ComputationError, match="Duplicated"):
            CountData.from_frames(counts, self._groups("a", "a", "b", "b"))

    def test_empty(self):
        with pytest.raises(ComputationError, match="empty"):
            CountData.from_frames(pd.DataFrame(), pd.Series(dtype=str))

    def test_unknown_group_name(self):
        counts = self._counts([[1, 2, 3, 4]])
        with pytest.raises(ComputationError, match="Unknown group"):
            CountData.from_frames(counts, self._groups("a", "a", "b", "b"), test_group="z")

    def test_test_group_alone_picks_other_reference(self):
        counts = self._counts([[1, 2, 3, 4]])
        data = CountData.from_frames(
            counts, self._groups("ctrl", "ctrl", "trt", "trt"), test_group="ctrl"
        )
        assert data.test_group == "ctrl"
        assert data.reference_group == "trt"
        assert data.test_samples == ["S1", "S2"]

    def test_reference_group_alone(self):
        counts = self._counts([[1, 2, 3, 4]])
        data = CountData.from_frames(
            counts, self._groups("ctrl", "ctrl", "trt", "trt"), reference_group="trt"
        )
        assert data.test_group == "ctrl"

    def test_same_group_twice_rejected(self):
        counts = self._counts([[1, 2, 3, 4]])
        with pytest.raises(ComputationError, match="must differ"):
            CountData.from_frames(
                counts,
                self._groups("a", "a", "b", "b"),
                test_group="a",
                reference_group="a",
            )

    def test_fractional_counts_rounded(self):
        counts = self._counts([[1.4, 2.6, 3.0, 4.0]])
        data = CountData.from_frames(counts, self._groups("a", "a", "b", "b"))
        assert data.counts.iloc[0].tolist() == [1, 3, 3, 4]
