"""
Data Validation Module for Proteomics Differential Expression Toolkit

Functions for validating sample and feature annotation before modeling, with
interpretable error messages when samples or conditions are missing.
"""

from typing import Dict, List, Optional

import pandas as pd


class SampleMatchingError(Exception):
    """Custom exception for sample matching issues."""
    def __init__(self, message):
        super().__init__(message)


class ConditionError(Exception):
    """Custom exception for missing or under-replicated experimental conditions."""
    def __init__(self, message):
        super().__init__(message)


def validate_sample_annotation(
    pset,
    condition_column: str = "condition",
    min_replicates: int = 2,
    verbose: bool = True
) -> Dict:
    """
    Validate that every sample carries a condition and that the design can be contrasted.

    Parameters:
    -----------
    pset : PeptideSet
        Dataset whose sample_data is checked
    condition_column : str
        Sample annotation column holding the condition label
    min_replicates : int
        Conditions with fewer samples produce a warning
    verbose : bool, default True
        Whether to print detailed validation results

    Returns:
    --------
    Dict containing validation results and diagnostic information
    """

    results = {
        'is_valid': True,
        'errors': [],
        'warnings': [],
        'diagnostics': {}
    }

    if verbose:
        print("SAMPLE ANNOTATION VALIDATION")
        print("=" * 50)

    if condition_column not in pset.sample_data.columns:
        results['errors'].append(f"Condition column '{condition_column}' not found in sample annotation")
        results['is_valid'] = False
        conditions = pd.Series(dtype=object)
    else:
        conditions = pset.sample_data[condition_column]

    unassigned = [str(s) for s in conditions[conditions.isna()].index]
    replicate_counts = conditions.dropna().value_counts().to_dict()

    if unassigned:
        results['errors'].append(
            f"Found {len(unassigned)} samples without a condition: "
            f"{unassigned[:5]}{'...' if len(unassigned) > 5 else ''}"
        )
        results['is_valid'] = False

    if condition_column in pset.sample_data.columns and len(replicate_counts) < 2:
        results['errors'].append(
            f"At least 2 conditions are required for contrasts, found {len(replicate_counts)}"
        )
        results['is_valid'] = False

    low_replicates = {c: n for c, n in replicate_counts.items() if n < min_replicates}
    if low_replicates:
        results['warnings'].append(
            f"Conditions with fewer than {min_replicates} samples: {low_replicates}"
        )

    results['diagnostics'] = {
        'total_samples': pset.n_samples,
        'unassigned_samples': unassigned,
        'conditions': sorted(str(c) for c in replicate_counts),
        'replicates_per_condition': replicate_counts,
    }

    if verbose:
        diag = results['diagnostics']
        print(f"Samples: {diag['total_samples']}")
        print(f"  Without condition: {len(diag['unassigned_samples'])}")
        print(f"Conditions: {diag['replicates_per_condition']}")
        for warning in results['warnings']:
            print(f"  WARNING: {warning}")
        if results['errors']:
            print("\nVALIDATION FAILED")
            for error in results['errors']:
                print(f"  ERROR: {error}")
        else:
            print("\n✓ VALIDATION PASSED")

    return results


def validate_feature_annotation(
    pset,
    required_columns: Optional[List[str]] = None,
) -> None:
    """
    Check that the feature annotation holds the columns a pipeline step needs.

    Raises:
    -------
    ValueError: If a required column is absent
    """
    if required_columns is None:
        required_columns = ["protein"]

    missing = [col for col in required_columns if col not in pset.feature_data.columns]
    if missing:
        raise ValueError(
            f"Missing required feature annotation columns: {missing}. "
            f"Run annotate_features() first or check the column names."
        )


def generate_sample_matching_diagnostic_report(
    sample_names: List[str],
    annotation_names: List[str],
) -> str:
    """
    Build a human readable report of how intensity samples and annotation rows line up.

    Parameters:
    -----------
    sample_names : List[str]
        Samples present in the intensity matrix
    annotation_names : List[str]
        Samples listed in the annotation table

    Returns:
    --------
    str : Multi-line diagnostic report
    """
    data_set = set(map(str, sample_names))
    annotation_set = set(map(str, annotation_names))

    matched = sorted(data_set & annotation_set)
    data_only = sorted(data_set - annotation_set)
    annotation_only = sorted(annotation_set - data_set)

    lines = [
        "SAMPLE MATCHING DIAGNOSTIC REPORT",
        "=" * 50,
        f"Samples in intensity data: {len(data_set)}",
        f"Samples in annotation: {len(annotation_set)}",
        f"Matched: {len(matched)}",
    ]

    if data_only:
        lines.append(f"\nIn data but not annotated ({len(data_only)}):")
        lines.extend(f"  - {name}" for name in data_only)

    if annotation_only:
        lines.append(f"\nAnnotated but not in data ({len(annotation_only)}):")
        lines.extend(f"  - {name}" for name in annotation_only)

        # Suggest likely matches for renamed samples
        for name in annotation_only:
            candidates = [d for d in data_only if name in d or d in name]
            if candidates:
                lines.append(f"  Possible match for '{name}': {candidates}")

    if not data_only and not annotation_only:
        lines.append("\n✓ All samples matched")

    return "\n".join(lines)
