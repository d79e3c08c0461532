"""
Tests for proteomics_de_toolkit.summarization module
"""

import numpy as np
import pandas as pd
import pytest

from proteomics_de_toolkit.summarization import (
    get_summarization_method,
    median_polish_summary,
    median_summary,
    robust_summary,
    summarize_group,
    summarize_peptides,
)


def _long_group(matrix, features=None, samples=None):
    """Long rows for a feature x sample matrix"""
    matrix = np.asarray(matrix, dtype=float)
    features = features or [f"pep{i}" for i in range(matrix.shape[0])]
    samples = samples or [f"s{j}" for j in range(matrix.shape[1])]
    rows = []
    for i, feature in enumerate(features):
        for j, sample in enumerate(samples):
            rows.append({"feature": feature, "sample": sample, "expression": matrix[i, j]})
    return pd.DataFrame(rows)


class TestRobustSummary:
    """Test Huber M-estimation of protein abundance"""

    def test_additive_data_recovered(self):
        """With little noise, sample differences are recovered"""
        np.random.seed(3)
        sample_effects = np.array([10.0, 11.0, 12.5, 10.5])
        peptide_effects = np.array([0.0, 2.0, -1.0])
        matrix = peptide_effects[:, np.newaxis] + sample_effects[np.newaxis, :]
        data = _long_group(matrix + np.random.normal(0, 0.01, matrix.shape))

        summary = robust_summary(data)

        assert list(summary.index) == ["s0", "s1", "s2", "s3"]
        assert np.allclose(np.diff(summary.values), np.diff(sample_effects), atol=0.05)

    def test_outlier_is_downweighted(self):
        np.random.seed(0)
        matrix = np.tile([20.0, 20.0, 20.0, 20.0], (5, 1)) + np.random.normal(0, 0.05, (5, 4))
        matrix[0, 2] += 8.0
        data = _long_group(matrix)

        robust = robust_summary(data)
        means = data.groupby("sample")["expression"].mean()

        assert abs(robust["s2"] - robust["s0"]) < abs(means["s2"] - means["s0"]) / 4

    def test_single_feature_returns_values(self):
        data = _long_group([[1.0, 2.0, 3.0]])

        summary = robust_summary(data)

        assert list(summary.values) == [1.0, 2.0, 3.0]

    def test_missing_columns_raise(self):
        with pytest.raises(ValueError, match="missing columns"):
            robust_summary(pd.DataFrame({"sample": ["s1"], "expression": [1.0]}))


class TestOtherSummaries:
    """Test median polish and median summaries"""

    def test_median_polish_additive(self):
        sample_effects = np.array([5.0, 7.0, 6.0])
        matrix = np.array([[0.0], [1.0], [3.0]]) + sample_effects[np.newaxis, :]

        summary = median_polish_summary(_long_group(matrix))

        assert np.allclose(np.diff(summary.values), np.diff(sample_effects))

    def test_median_summary(self):
        data = _long_group([[1.0, 10.0], [2.0, 20.0], [9.0, 30.0]])

        summary = median_summary(data)

        assert list(summary.values) == [2.0, 20.0]

    def test_missing_values_ignored(self):
        data = _long_group([[1.0, np.nan], [3.0, 5.0]])

        summary = summarize_group(data, "median")

        assert list(summary["sample"]) == ["s0", "s1"]
        assert list(summary["expression"]) == [2.0, 5.0]


class TestMethodRegistry:
    """Test pluggable summarization methods"""

    def test_named_methods(self):
        assert get_summarization_method("robust") is robust_summary
        assert get_summarization_method("median_polish") is median_polish_summary

    def test_callable_passthrough(self):
        def first_feature(data):
            return data[data["feature"] == "pep0"].set_index("sample")["expression"]

        assert get_summarization_method(first_feature) is first_feature

        summary = summarize_group(_long_group([[1.0, 2.0], [3.0, 4.0]]), first_feature)
        assert list(summary["expression"]) == [1.0, 2.0]

    def test_unknown_method_raises(self):
        with pytest.raises(ValueError, match="Unknown summarization method"):
            get_summarization_method("mean_of_means")


class TestSummarizePeptides:
    """Test summarization of a whole peptide set"""

    def test_one_row_per_protein_group(self, peptide_set):
        result = summarize_peptides(peptide_set)

        assert list(result.exprs.index) == ["P1", "P1;P4", "P2", "P3"]
        assert result.sample_names == peptide_set.sample_names
        assert list(result.feature_data["protein"]) == ["P1", "P1;P4", "P2", "P3"]
        assert list(result.feature_data["n_features"]) == [3, 1, 2, 1]
        assert "Summarized to 4 protein groups" in result.processing[-1]

    def test_condition_effect_preserved(self, peptide_set):
        result = summarize_peptides(peptide_set)

        a_mean = result.exprs.loc["P1", ["A_1", "A_2", "A_3"]].mean()
        b_mean = result.exprs.loc["P1", ["B_1", "B_2", "B_3"]].mean()
        assert b_mean - a_mean == pytest.approx(2.0, abs=0.3)

    def test_unobserved_samples_are_missing(self, peptide_set):
        pset = peptide_set.copy()
        pset.exprs.loc["PEPTIDEF", "A_1"] = np.nan

        result = summarize_peptides(pset, method="median")

        assert np.isnan(result.exprs.loc["P3", "A_1"])
        assert result.exprs.loc["P3", "A_2"] == pytest.approx(pset.exprs.loc["PEPTIDEF", "A_2"])

    def test_parallel_matches_serial(self, peptide_set):
        serial = summarize_peptides(peptide_set, n_jobs=1)
        parallel = summarize_peptides(peptide_set, n_jobs=2)

        pd.testing.assert_frame_equal(serial.exprs, parallel.exprs)

    def test_missing_group_column_raises(self, peptide_set):
        with pytest.raises(ValueError, match="Grouping columns"):
            summarize_peptides(peptide_set, group_vars=["gene"])
