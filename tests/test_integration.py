"""
Tests for the complete workflow from MaxQuant files to contrast results
These tests check that each step hands the next one data it can use.
"""

import numpy as np
import pytest

from proteomics_de_toolkit.data_import import (
    load_maxquant_peptides,
    load_protein_groups,
    read_fasta_accessions,
)
from proteomics_de_toolkit.normalization import normalize
from proteomics_de_toolkit.preprocessing import (
    add_site_only_flags,
    add_species_flags,
    annotate_features,
    assign_conditions,
    filter_flagged_features,
    filter_min_observations,
    filter_multi_species_features,
    filter_smallest_protein_groups,
    mask_zero_intensities,
)
from proteomics_de_toolkit.statistical_analysis import get_contrast_table, run_protein_analysis
from proteomics_de_toolkit.validation import validate_sample_annotation


class TestMaxQuantWorkflow:
    """Test the whole chain on MaxQuant-style input files"""

    @pytest.fixture
    def prepared_set(self, maxquant_files):
        """Peptide set after annotation, normalization and all filters"""
        pset = load_maxquant_peptides(maxquant_files["peptides"])
        pset = annotate_features(pset)
        pset = add_site_only_flags(pset, load_protein_groups(maxquant_files["protein_groups"]))
        pset = add_species_flags(pset, {"human": read_fasta_accessions(maxquant_files["fasta"])})
        pset = assign_conditions(pset, pattern=r"^(\w+?)_\d+$")

        pset = mask_zero_intensities(pset)
        pset = filter_flagged_features(pset)
        pset = filter_multi_species_features(pset, ["human"])
        pset = normalize(pset, "log2")
        pset = filter_smallest_protein_groups(pset)
        return filter_min_observations(pset)

    def test_filters_leave_expected_features(self, prepared_set):
        # Contaminant, reverse and site-only peptides are gone; P1 remains
        assert list(prepared_set.exprs.index) == ["AAAK", "CCCK"]
        assert prepared_set.sample_names == ["Ctrl_1", "Ctrl_2", "Treat_1", "Treat_2"]
        assert set(prepared_set.feature_data["protein"]) == {"P1"}
        assert prepared_set.feature_data["human"].all()

        # The masked zero stays missing, the rest is on the log2 scale
        assert np.isnan(prepared_set.exprs.loc["CCCK", "Ctrl_1"])
        assert prepared_set.exprs.loc["AAAK", "Ctrl_2"] == pytest.approx(np.log2(110.0))

    def test_processing_history_is_complete(self, prepared_set):
        history = " | ".join(prepared_set.processing)

        assert "zero intensities" in history
        assert "log2" in history
        assert "smallest protein groups" in history
        assert "Observation filter converged" in prepared_set.processing[-1]

    def test_design_is_valid(self, prepared_set):
        result = validate_sample_annotation(prepared_set, verbose=False)

        assert result["is_valid"]
        assert result["diagnostics"]["replicates_per_condition"] == {"Ctrl": 2, "Treat": 2}

    def test_differential_analysis(self, prepared_set, statistical_config):
        statistical_config.formulas = ["expression ~ (1|condition)", "expression ~ condition"]

        results = run_protein_analysis(prepared_set, statistical_config)

        assert list(results["protein"]) == ["P1"]
        assert results.loc[0, "status"] == "ok"
        assert results.loc[0, "n_features"] == 2
        assert results.loc[0, "formula"] in statistical_config.formulas

        flat = get_contrast_table(results)
        assert len(flat) == 1
        assert flat.loc[0, "protein"] == "P1"
        assert flat.loc[0, "contrast"] == "conditionTreat-conditionCtrl"
        assert np.isfinite(flat.loc[0, "logFC"])
        assert 0 <= flat.loc[0, "P.Value"] <= 1
        assert flat.loc[0, "adj.P.Val"] == pytest.approx(flat.loc[0, "P.Value"])
