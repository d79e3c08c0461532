"""
Proteomics Differential Expression Toolkit
==========================================

A Python library for peptide-to-protein summarization and differential
expression analysis of label-free proteomics data, particularly designed for
MaxQuant peptides.txt / proteinGroups.txt outputs. This toolkit provides a
complete workflow from data import through filtering, normalization, robust
summarization, per-protein (mixed) linear models and multiple testing.

QUICK START EXAMPLE:
-------------------
    import proteomics_de_toolkit as pdt

    # 1. Load and annotate data
    pset = pdt.load_maxquant_peptides('peptides.txt')
    pset = pdt.annotate_features(pset)
    pset = pdt.add_site_only_flags(pset, pdt.load_protein_groups('proteinGroups.txt'))
    pset = pdt.assign_conditions(pset, pattern=r'^(\\w+)_\\d+$')

    # 2. Filter and normalize
    pset = pdt.filter_flagged_features(pset)
    pset = pdt.vsn_normalize(pdt.mask_zero_intensities(pset))
    pset = pdt.filter_smallest_protein_groups(pset)
    pset = pdt.filter_min_observations(pset)

    # 3. Summarize and model
    config = pdt.StatisticalConfig()
    results = pdt.run_protein_analysis(pset, config)

    # 4. Export
    pdt.export_complete_analysis(results, config, output_prefix='my_analysis')

MODULE OVERVIEW:
===============

dataset
    Purpose: PeptideSet container (intensity matrix + feature/sample annotation)
    Key functions: PeptideSet.subset(), PeptideSet.to_long()

data_import
    Purpose: Load MaxQuant tables, sample annotation and FASTA accessions
    Key functions: load_maxquant_peptides(), load_protein_groups(), read_fasta_accessions()
    Use when: Starting analysis

preprocessing
    Purpose: Feature flags, sample conditions and the pre-modeling filters
    Key functions: annotate_features(), filter_smallest_protein_groups(), filter_min_observations()
    Use when: Cleaning data before summarization

normalization
    Purpose: Log transformation and normalization of intensities
    Key functions: vsn_normalize(), center_normalize(), quantile_normalize()
    Use when: Raw intensities need transformation before modeling

summarization
    Purpose: Collapse peptides into protein-level values per sample
    Key functions: summarize_peptides(), robust_summary()
    Use when: Protein-level tables are needed outside the modeling step

statistical_analysis
    Purpose: Per-protein models with formula fallback, contrasts, moderated statistics, FDR
    Key functions: run_protein_analysis(), StatisticalConfig(), get_contrast_table()
    Use when: Performing differential analysis between conditions

validation
    Purpose: Sample/feature annotation checks and diagnostic reporting
    Key functions: validate_sample_annotation(), generate_sample_matching_diagnostic_report()
    Use when: Conditions or sample names need checking before analysis

export
    Purpose: Export results, protein summaries and timestamped configurations
    Key functions: export_complete_analysis(), export_timestamped_config()
    Use when: Saving results and creating reproducible analysis records

ERROR HANDLING:
==============
- SampleMatchingError: Samples cannot be matched to a condition
- ConditionError: Condition annotation missing or insufficient for contrasts
- FormulaError: A model formula cannot be interpreted
- Per-protein model failures never abort an analysis; they are reported in the
  'status' column of the results
"""

# =============================================================================
# MODULE IMPORTS - Core functionality organized by analysis stage
# =============================================================================

from . import dataset              # Data container
from . import data_import          # Data loading and parsing
from . import preprocessing        # Annotation and filtering
from . import normalization        # Normalization methods
from . import summarization        # Peptide to protein summarization
from . import statistical_analysis # Statistical testing and modeling
from . import validation           # Data validation and error checking
from . import export               # Results export and configuration management

__version__ = "1.0.0"

# =============================================================================
# CONVENIENCE IMPORTS - Most commonly used functions available at top level
# =============================================================================

from .dataset import PeptideSet

# DATA LOADING
from .data_import import (
    load_maxquant_peptides,   # Main function: peptides.txt -> PeptideSet
    load_protein_groups,      # proteinGroups.txt for site-only flags
    load_sample_annotation,   # Sample table indexed by sample name
    read_fasta_accessions,    # Accessions for species flags
    clean_sample_names,
)

# PREPROCESSING
from .preprocessing import (
    annotate_features,
    add_site_only_flags,
    add_species_flags,
    assign_conditions,
    mask_zero_intensities,
    filter_flagged_features,
    filter_multi_species_features,
    filter_smallest_protein_groups,  # Minimal protein groups only
    filter_min_observations,         # Iterative fixed-point observation filter
    assess_data_completeness,
)

# NORMALIZATION
from .normalization import (
    normalize,
    log_transform,
    vsn_normalize,        # Default: variance stabilizing (glog2) transformation
    center_normalize,
    quantile_normalize,
)

# SUMMARIZATION
from .summarization import (
    summarize_peptides,
    robust_summary,
    median_polish_summary,
)

# STATISTICAL ANALYSIS
from .statistical_analysis import (
    run_protein_analysis,      # Main function: complete differential analysis
    display_analysis_summary,
    get_contrast_table,
    StatisticalConfig,
    FormulaError,
    ModelFitError,
)

# DATA VALIDATION
from .validation import (
    validate_sample_annotation,
    generate_sample_matching_diagnostic_report,
    SampleMatchingError,
    ConditionError,
)

# DATA EXPORT
from .export import (
    export_complete_analysis,  # Main function: export everything (results + config)
    export_contrast_results,
    export_protein_summaries,
    export_timestamped_config,
    create_config_dict,
)

# =============================================================================
# PUBLIC API - All functions available for import
# =============================================================================

__all__ = [
    # MODULES
    "dataset",
    "data_import",
    "preprocessing",
    "normalization",
    "summarization",
    "statistical_analysis",
    "validation",
    "export",

    # DATA CONTAINER
    "PeptideSet",

    # DATA LOADING
    "load_maxquant_peptides",
    "load_protein_groups",
    "load_sample_annotation",
    "read_fasta_accessions",
    "clean_sample_names",

    # PREPROCESSING
    "annotate_features",
    "add_site_only_flags",
    "add_species_flags",
    "assign_conditions",
    "mask_zero_intensities",
    "filter_flagged_features",
    "filter_multi_species_features",
    "filter_smallest_protein_groups",
    "filter_min_observations",
    "assess_data_completeness",

    # NORMALIZATION
    "normalize",
    "log_transform",
    "vsn_normalize",
    "center_normalize",
    "quantile_normalize",

    # SUMMARIZATION
    "summarize_peptides",
    "robust_summary",
    "median_polish_summary",

    # STATISTICAL ANALYSIS
    "run_protein_analysis",
    "display_analysis_summary",
    "get_contrast_table",
    "StatisticalConfig",
    "FormulaError",
    "ModelFitError",

    # VALIDATION
    "validate_sample_annotation",
    "generate_sample_matching_diagnostic_report",
    "SampleMatchingError",
    "ConditionError",

    # EXPORT
    "export_complete_analysis",
    "export_contrast_results",
    "export_protein_summaries",
    "export_timestamped_config",
    "create_config_dict",
]
