"""
Tests for proteomics_de_toolkit.preprocessing module
"""

import numpy as np
import pandas as pd
import pytest

from proteomics_de_toolkit.data_import import load_maxquant_peptides, load_protein_groups
from proteomics_de_toolkit.dataset import PeptideSet
from proteomics_de_toolkit.preprocessing import (
    add_site_only_flags,
    add_species_flags,
    annotate_features,
    assess_data_completeness,
    assign_conditions,
    filter_flagged_features,
    filter_min_observations,
    filter_multi_species_features,
    filter_smallest_protein_groups,
    mask_zero_intensities,
    split_protein_group,
)
from proteomics_de_toolkit.validation import ConditionError, SampleMatchingError


@pytest.fixture
def annotated_set(maxquant_files):
    return annotate_features(load_maxquant_peptides(maxquant_files["peptides"]))


def _observation_invariants_hold(pset, min_samples=2, min_feature_observations=2):
    observed = pset.exprs.notna()
    if (observed.sum(axis=1) < min_feature_observations).any():
        return False
    per_protein = observed.groupby(pset.feature_data["protein"].values).any()
    counts = per_protein.T.groupby(pset.sample_data["condition"].values).sum().T
    return bool(((counts == 0) | (counts >= min_samples)).all().all())


class TestSplitProteinGroup:
    """Test protein group splitting"""

    def test_split_members(self):
        assert split_protein_group("P1;P2; P3") == ["P1", "P2", "P3"]

    def test_split_missing(self):
        assert split_protein_group(np.nan) == []
        assert split_protein_group(None) == []


class TestAnnotation:
    """Test feature flag annotation"""

    def test_annotate_features(self, annotated_set):
        fdata = annotated_set.feature_data

        assert fdata.loc["AAAK", "protein"] == "P1"
        assert fdata.loc["EEEK", "contaminant"]
        assert fdata.loc["FFFK", "reverse"]
        assert not fdata.loc["AAAK", "contaminant"]
        assert fdata["contaminant"].dtype == bool

    def test_annotate_features_missing_flag_columns(self, peptide_set):
        pset = peptide_set.copy()
        pset.feature_data = pset.feature_data.drop(columns=["contaminant", "reverse"])
        pset.feature_data["Proteins"] = pset.feature_data["protein"]

        with pytest.warns(UserWarning):
            result = annotate_features(pset)

        assert not result.feature_data["contaminant"].any()
        assert not result.feature_data["reverse"].any()

    def test_site_only_flags_member_wise(self, annotated_set, maxquant_files):
        """Groups differ between the two tables; any flagged member flags the feature"""
        protein_groups = load_protein_groups(maxquant_files["protein_groups"])

        result = add_site_only_flags(annotated_set, protein_groups)

        # "P2;P3" shares P3 with the flagged group "P3;P5"
        assert result.feature_data.loc["DDDK", "site_only"]
        assert not result.feature_data.loc["AAAK", "site_only"]
        assert "site_only" not in annotated_set.feature_data.columns

    def test_species_flags_are_total(self, annotated_set):
        result = add_species_flags(annotated_set, {"human": {"P1", "P2"}, "ecoli": {"P3"}})
        fdata = result.feature_data

        assert fdata.loc["AAAK", "human"] and not fdata.loc["AAAK", "ecoli"]
        assert fdata.loc["DDDK", "human"] and fdata.loc["DDDK", "ecoli"]
        # Unknown accessions default to False for every species
        assert not fdata.loc["EEEK", "human"] and not fdata.loc["EEEK", "ecoli"]
        assert fdata[["human", "ecoli"]].notna().all().all()

    def test_filter_multi_species(self, annotated_set):
        flagged = add_species_flags(annotated_set, {"human": {"P1", "P2"}, "ecoli": {"P3"}})

        result = filter_multi_species_features(flagged, ["human", "ecoli"])

        assert "DDDK" not in result.exprs.index
        assert result.n_features == annotated_set.n_features - 1


class TestAssignConditions:
    """Test sample condition assignment"""

    def test_assign_by_pattern(self, annotated_set):
        result = assign_conditions(annotated_set, pattern=r"^(\w+?)_\d+$")

        assert list(result.sample_data["condition"]) == ["Ctrl", "Ctrl", "Treat", "Treat"]

    def test_assign_by_mapping(self, annotated_set):
        mapping = {"Ctrl_1": "A", "Ctrl_2": "A", "Treat_1": "B", "Treat_2": "B"}

        result = assign_conditions(annotated_set, conditions=mapping)

        assert result.sample_data.loc["Treat_2", "condition"] == "B"

    def test_assign_by_annotation_table(self, annotated_set):
        annotation = pd.DataFrame(
            {"group": ["A", "A", "B", "B"], "batch": [1, 2, 1, 2]},
            index=["Ctrl_1", "Ctrl_2", "Treat_1", "Treat_2"],
        )

        result = assign_conditions(annotated_set, sample_annotation=annotation, annotation_column="group")

        assert list(result.sample_data["condition"]) == ["A", "A", "B", "B"]
        assert list(result.sample_data["batch"]) == [1, 2, 1, 2]

    def test_unresolved_samples_raise(self, annotated_set):
        with pytest.raises(SampleMatchingError, match="Treat_2"):
            assign_conditions(
                annotated_set, conditions={"Ctrl_1": "A", "Ctrl_2": "A", "Treat_1": "B"}
            )

    def test_exactly_one_source_required(self, annotated_set):
        with pytest.raises(ValueError, match="exactly one"):
            assign_conditions(annotated_set, conditions={"Ctrl_1": "A"}, pattern="x")


class TestFlagFilters:
    """Test zero masking and flag based filters"""

    def test_mask_zero_intensities(self, annotated_set):
        result = mask_zero_intensities(annotated_set)

        assert result.exprs.isna().sum().sum() == 2
        assert (annotated_set.exprs == 0).sum().sum() == 2

    def test_filter_flagged_features(self, annotated_set, maxquant_files):
        flagged = add_site_only_flags(annotated_set, load_protein_groups(maxquant_files["protein_groups"]))

        result = filter_flagged_features(flagged)

        assert list(result.exprs.index) == ["AAAK", "CCCK"]

    def test_missing_flag_column_warns(self, annotated_set):
        with pytest.warns(UserWarning, match="site_only"):
            result = filter_flagged_features(annotated_set)

        assert list(result.exprs.index) == ["AAAK", "CCCK", "DDDK"]


class TestFilterSmallestProteinGroups:
    """Test the minimal protein group filter"""

    def test_superset_group_dropped(self, peptide_set):
        """'P1;P4' is dropped once 'P1' exists on its own"""
        result = filter_smallest_protein_groups(peptide_set)

        assert "P1;P4" not in set(result.feature_data["protein"])
        assert set(result.feature_data["protein"]) == {"P1", "P2", "P3"}
        assert result.n_features == peptide_set.n_features - 1

    def test_overlapping_groups_of_equal_size_kept(self):
        exprs = pd.DataFrame(np.ones((3, 2)), index=["f1", "f2", "f3"], columns=["s1", "s2"])
        pset = PeptideSet(
            exprs=exprs,
            feature_data=pd.DataFrame({"protein": ["P1;P2", "P2;P3", "P1;P2;P3"]}, index=exprs.index),
            sample_data=pd.DataFrame(index=exprs.columns),
        )

        result = filter_smallest_protein_groups(pset)

        assert list(result.feature_data["protein"]) == ["P1;P2", "P2;P3"]


class TestFilterMinObservations:
    """Test the iterative fixed-point observation filter"""

    @pytest.fixture
    def sparse_set(self, peptide_set):
        np.random.seed(1)
        pset = peptide_set.copy()
        mask = np.random.random(pset.exprs.shape) < 0.4
        pset.exprs = pset.exprs.mask(mask)
        return pset

    def test_masks_under_observed_condition(self, peptide_set):
        pset = peptide_set.copy()
        pset.exprs.loc["PEPTIDEF", ["B_2", "B_3"]] = np.nan

        result = filter_min_observations(pset)

        # P3 observed in only one B sample: its B cells are masked, A cells remain
        assert result.exprs.loc["PEPTIDEF", ["B_1", "B_2", "B_3"]].isna().all()
        assert result.exprs.loc["PEPTIDEF", ["A_1", "A_2", "A_3"]].notna().all()

    def test_cascading_removal(self, peptide_set):
        pset = peptide_set.copy()
        pset.exprs.loc["PEPTIDEF"] = [np.nan, np.nan, 20.0, 21.0, np.nan, np.nan]

        result = filter_min_observations(pset)

        # Both conditions under-observed -> all cells masked -> feature dropped
        assert "PEPTIDEF" not in result.exprs.index

    def test_filter_is_idempotent(self, sparse_set):
        once = filter_min_observations(sparse_set)
        twice = filter_min_observations(once)

        pd.testing.assert_frame_equal(once.exprs, twice.exprs)
        assert _observation_invariants_hold(once)

    def test_filter_never_grows(self, sparse_set):
        result = filter_min_observations(sparse_set)

        assert result.n_features <= sparse_set.n_features
        assert result.n_samples <= sparse_set.n_samples
        original = sparse_set.exprs.loc[result.exprs.index, result.exprs.columns]
        assert not (result.exprs.notna() & original.isna()).any().any()

    def test_empty_samples_dropped(self, peptide_set):
        pset = peptide_set.copy()
        pset.exprs["A_1"] = np.nan

        result = filter_min_observations(pset)

        assert "A_1" not in result.sample_names
        assert list(result.sample_data.index) == result.sample_names

    def test_missing_condition_raises(self, peptide_set):
        pset = peptide_set.copy()
        pset.sample_data.loc["A_1", "condition"] = np.nan

        with pytest.raises(ConditionError):
            filter_min_observations(pset)

    def test_features_without_protein_dropped(self, peptide_set):
        """Features with an empty protein group are removed with a warning"""
        pset = peptide_set.copy()
        pset.feature_data.loc["PEPTIDEG", "protein"] = np.nan

        with pytest.warns(UserWarning, match="without a 'protein' value"):
            result = filter_min_observations(pset)

        assert "PEPTIDEG" not in result.exprs.index
        assert "PEPTIDEA" in result.exprs.index
        assert list(result.feature_data.index) == list(result.exprs.index)

    def test_processing_logged(self, peptide_set):
        result = filter_min_observations(peptide_set)

        assert "Observation filter converged" in result.processing[-1]


class TestAssessDataCompleteness:
    """Test data completeness assessment"""

    def test_completeness_fraction(self, peptide_set):
        pset = peptide_set.copy()
        pset.exprs.iloc[0, :3] = np.nan

        stats = assess_data_completeness(pset)

        assert stats["total_values"] == 42
        assert stats["observed_values"] == 39
        assert stats["fraction_observed"] == pytest.approx(39 / 42)
