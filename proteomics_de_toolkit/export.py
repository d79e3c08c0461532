"""
Export Module for Proteomics Differential Expression Toolkit

This module handles exporting analysis results, protein-level summaries and
configurations. It provides functions for creating timestamped configuration
files so that an analysis can be rerun with identical settings.
"""

from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from .dataset import PeptideSet
from .statistical_analysis import StatisticalConfig, get_contrast_table
from .summarization import SUMMARIZATION_METHODS


def _separator_for(output_file) -> str:
    return "," if Path(output_file).suffix.lower() == ".csv" else "\t"


def export_contrast_results(
    results: pd.DataFrame, output_file: str, include_all: bool = True
) -> pd.DataFrame:
    """
    Export the flat contrast table of a differential analysis.

    Parameters:
    -----------
    results : pd.DataFrame
        Output of run_protein_analysis()
    output_file : str
        Output filename; ".csv" is comma separated, anything else tab separated
    include_all : bool
        Whether to include all proteins or only significant ones

    Returns:
    --------
    pd.DataFrame : The exported table
    """
    export_df = get_contrast_table(results)

    if not include_all:
        export_df = export_df[export_df["Significant"].astype(bool)].copy()
        print(f"Exporting {len(export_df)} significant contrast rows to {output_file}")
    else:
        print(f"Exporting all {len(export_df)} contrast rows to {output_file}")

    export_df.to_csv(output_file, sep=_separator_for(output_file), index=False)
    print("Results exported successfully!")
    return export_df


def export_protein_summaries(summarized: PeptideSet, output_file: str) -> str:
    """
    Export a protein-level set (from summarize_peptides()) as one wide table.

    Feature annotation columns come first, followed by one column per sample.
    """
    table = pd.concat([summarized.feature_data, summarized.exprs], axis=1)
    table.index.name = "feature"
    table.to_csv(output_file, sep=_separator_for(output_file))
    print(f"Protein summaries exported to: {output_file} "
          f"({summarized.n_features} protein groups x {summarized.n_samples} samples)")
    return output_file


def export_significant_proteins_summary(
    contrast_table: pd.DataFrame,
    config_dict: Dict[str, Any],
    output_prefix: str = "proteomics_analysis",
) -> str:
    """
    Export a summary of significant proteins with key statistics.

    Parameters:
    -----------
    contrast_table : pd.DataFrame
        Flat contrast table from get_contrast_table()
    config_dict : dict
        Configuration parameters (uses q_value_threshold)
    output_prefix : str
        Prefix for output filename

    Returns:
    --------
    str
        Path to exported summary file, empty if nothing was significant
    """

    q_threshold = config_dict.get("q_value_threshold", 0.05)

    significant_results = contrast_table[contrast_table["adj.P.Val"] < q_threshold]

    if len(significant_results) == 0:
        print("No significant proteins found - skipping summary export")
        return ""

    summary_file = f"{output_prefix}_significant_proteins_summary.tsv"
    summary_data = significant_results.copy()

    summary_data["Regulation"] = summary_data["logFC"].apply(
        lambda x: "Up" if x > 0 else ("Down" if x < 0 else "Unchanged")
    )
    summary_data = summary_data.sort_values(["contrast", "adj.P.Val"])

    summary_data.to_csv(summary_file, sep="\t", index=False)
    print(f"Significant proteins summary exported to: {summary_file}")
    print(f"  • Total significant: {len(summary_data)}")
    print(f"  • Upregulated: {(summary_data['Regulation'] == 'Up').sum()}")
    print(f"  • Downregulated: {(summary_data['Regulation'] == 'Down').sum()}")

    return summary_file


def export_timestamped_config(
    config_dict: Dict[str, Any],
    output_prefix: str = "proteomics_analysis",
    analysis_description: str = "Proteomics differential analysis",
    computed_values: Optional[Dict[str, Any]] = None,
) -> str:
    """
    Export analysis configuration as a timestamped Python file.

    Parameters:
    -----------
    config_dict : dict
        Dictionary containing all configuration parameters
    output_prefix : str
        Prefix for the configuration filename
    analysis_description : str
        Description of the analysis type
    computed_values : dict, optional
        Additional computed values to include as comments

    Returns:
    --------
    str
        Path to the exported configuration file
    """

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    config_file = f"{output_prefix}_config_{timestamp}.py"

    print(f"Exporting analysis configuration to: {config_file}")

    with open(config_file, "w", encoding="utf-8") as f:
        f.write(
            "# =============================================================================\n"
        )
        f.write("# PROTEOMICS DIFFERENTIAL ANALYSIS CONFIGURATION\n")
        f.write(f"# Generated: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}\n")
        f.write(f"# Analysis: {analysis_description}\n")
        f.write(
            "# =============================================================================\n\n"
        )

        section_configs = [
            (
                1,
                "INPUT FILES",
                ["peptide_file", "protein_groups_file", "sample_annotation_file",
                 "fasta_files", "intensity_prefix"],
            ),
            (
                2,
                "FEATURE FILTERING",
                ["filter_flags", "smallest_protein_groups", "min_samples",
                 "min_feature_observations"],
            ),
            (3, "NORMALIZATION STRATEGY", ["normalization_method", "optimize_vsn"]),
            (4, "SUMMARIZATION", ["mode", "group_vars", "summarization_method"]),
            (
                5,
                "MODEL CONFIGURATION",
                ["condition_column", "formulas", "contrasts", "robust_iterations"],
            ),
            (
                6,
                "INFERENCE",
                ["squeeze_variance", "correction_method", "q_value_threshold"],
            ),
            (7, "OUTPUT AND EXECUTION", ["output_prefix", "n_jobs", "keep_model"]),
        ]

        for section_num, section_name, param_names in section_configs:
            _write_config_section(f, section_name, config_dict, param_names, section_num)

        if computed_values:
            f.write(
                "# =============================================================================\n"
            )
            f.write("# COMPUTED VALUES (for reference)\n")
            f.write(
                "# =============================================================================\n"
            )
            for key, value in computed_values.items():
                f.write(f"# {key}: {value}\n")

    return config_file


def _write_config_section(
    file_handle,
    section_name: str,
    config_dict: Dict[str, Any],
    param_names: List[str],
    section_number: int = 1,
) -> None:
    """Write a configuration section to file."""

    file_handle.write(
        "# =============================================================================\n"
    )
    file_handle.write(f"# {section_number}. {section_name}\n")
    file_handle.write(
        "# =============================================================================\n"
    )

    for param in param_names:
        if param in config_dict:
            value = config_dict[param]
            if isinstance(value, pd.DataFrame):
                value = value.to_dict()
            if callable(value):
                registered = [name for name, method in SUMMARIZATION_METHODS.items() if method is value]
                if not registered:
                    # Custom functions cannot be written as literals; record where they live
                    location = f"{getattr(value, '__module__', '?')}.{getattr(value, '__qualname__', repr(value))}"
                    file_handle.write(f"# {param} = {location}  (custom function, set in code)\n")
                    continue
                value = registered[0]
            file_handle.write(f"{param} = {repr(value)}\n")

    file_handle.write("\n")


def create_config_dict(config: Optional[StatisticalConfig] = None, **kwargs) -> Dict[str, Any]:
    """
    Create a configuration dictionary for export.

    Parameters:
    -----------
    config : StatisticalConfig, optional
        Analysis configuration; its attributes override the defaults
    **kwargs : various
        Pipeline settings (input files, filters, normalization, ...); these
        override both the defaults and the config attributes

    Returns:
    --------
    dict
        Configuration dictionary
    """

    config_template = {
        # Input files
        "peptide_file": "",
        "protein_groups_file": "",
        "sample_annotation_file": "",
        "fasta_files": {},
        "intensity_prefix": "Intensity ",
        # Filtering
        "filter_flags": ["contaminant", "reverse", "site_only"],
        "smallest_protein_groups": True,
        "min_samples": 2,
        "min_feature_observations": 2,
        # Normalization
        "normalization_method": "vsn",
        "optimize_vsn": False,
        # Output
        "output_prefix": "proteomics_analysis",
    }

    config_dict = config_template.copy()
    if config is not None:
        config_dict.update(vars(config))
    config_dict.update(kwargs)

    return config_dict


def export_complete_analysis(
    results: pd.DataFrame,
    config: StatisticalConfig,
    output_prefix: str = "proteomics_analysis",
    summarized: Optional[PeptideSet] = None,
    analysis_description: str = "Protein-level differential analysis",
    **config_values,
) -> Dict[str, str]:
    """
    Export complete analysis including results, summaries and timestamped configuration.

    This is the main export function that combines data export and configuration export.

    Parameters:
    -----------
    results : pd.DataFrame
        Output of run_protein_analysis()
    config : StatisticalConfig
        Configuration used for the analysis
    output_prefix : str
        Prefix for output filenames
    summarized : PeptideSet, optional
        Protein-level set to export alongside the results
    analysis_description : str
        Description for the configuration header
    **config_values
        Pipeline settings recorded in the configuration file

    Returns:
    --------
    dict
        Dictionary of all exported files
    """

    exported_files = {}

    contrast_file = f"{output_prefix}_contrasts.tsv"
    contrast_table = export_contrast_results(results, contrast_file)
    exported_files["contrasts"] = contrast_file

    if summarized is not None:
        summary_file = f"{output_prefix}_protein_summaries.tsv"
        export_protein_summaries(summarized, summary_file)
        exported_files["protein_summaries"] = summary_file

    config_dict = create_config_dict(config, output_prefix=output_prefix, **config_values)

    if len(contrast_table) > 0:
        significant_file = export_significant_proteins_summary(
            contrast_table, config_dict, output_prefix
        )
        if significant_file:
            exported_files["significant_proteins"] = significant_file

    computed_values = {
        "Protein groups analyzed": len(results),
        "Successful fits": int((results["status"] == "ok").sum()) if len(results) else 0,
    }
    if "formula" in results.columns and results["formula"].notna().any():
        computed_values["Formula usage"] = results["formula"].value_counts().to_dict()

    config_file = export_timestamped_config(
        config_dict=config_dict,
        output_prefix=output_prefix,
        analysis_description=analysis_description,
        computed_values=computed_values,
    )
    exported_files["configuration"] = config_file

    _print_export_summary(exported_files, config_file)

    return exported_files


def _print_export_summary(exported_files: Dict[str, str], config_file: str) -> None:
    """Print a summary of exported files."""

    print("\n" + "=" * 60)
    print("✓ All analysis results and configuration exported successfully!")
    print("Files created:")

    if "contrasts" in exported_files:
        print(f"  • {exported_files['contrasts']} - Contrast results per protein group")
    if "protein_summaries" in exported_files:
        print(f"  • {exported_files['protein_summaries']} - Summarized protein intensities")
    if "significant_proteins" in exported_files:
        print(f"  • {exported_files['significant_proteins']} - Significant proteins")
    if "configuration" in exported_files:
        print(f"  • {exported_files['configuration']} - Python configuration (timestamped)")

    print("=" * 60)

    print("\nREPRODUCIBILITY TIP:")
    print("To reproduce this analysis:")
    print(f"1. Copy the configuration variables from: {config_file}")
    print("2. Set them on a StatisticalConfig and rerun the pipeline")
    print(f"3. Or import directly: exec(open('{config_file}').read())")
