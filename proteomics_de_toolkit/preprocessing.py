"""
Data Preprocessing Module for Proteomics Differential Expression Toolkit

Functions for feature and sample annotation, missing-value masking and the
filters applied before summarization and modeling.
"""

import re
import warnings
from typing import Dict, Iterable, List, Optional, Sequence, Union

import numpy as np
import pandas as pd

from .dataset import PeptideSet
from .validation import ConditionError, SampleMatchingError


def split_protein_group(group: Optional[str], sep: str = ";") -> List[str]:
    """
    Split a protein group identifier into its member accessions.

    Parameters:
    -----------
    group : str
        Protein group, e.g. "P12345;Q67890"
    sep : str
        Member separator

    Returns:
    --------
    List[str] : Member accessions (empty for missing groups)
    """
    if group is None or (isinstance(group, float) and np.isnan(group)):
        return []
    return [member.strip() for member in str(group).split(sep) if member.strip()]


def _flag_to_bool(values: pd.Series) -> pd.Series:
    """Convert MaxQuant style flags ('+' or empty) to booleans."""
    def convert(value):
        if isinstance(value, (bool, np.bool_)):
            return bool(value)
        if value is None or (isinstance(value, float) and np.isnan(value)):
            return False
        if isinstance(value, (int, float, np.integer, np.floating)):
            return value != 0
        return str(value).strip().lower() in ("+", "true", "yes", "1")

    return values.map(convert).astype(bool)


def annotate_features(
    pset: PeptideSet,
    protein_column: str = "Proteins",
    contaminant_column: str = "Potential contaminant",
    reverse_column: str = "Reverse",
) -> PeptideSet:
    """
    Add the standard feature annotation columns: protein, contaminant, reverse.

    Parameters:
    -----------
    pset : PeptideSet
        Dataset loaded by load_maxquant_peptides()
    protein_column : str
        Column with the (semicolon separated) protein group of each peptide
    contaminant_column : str
        MaxQuant contaminant flag column
    reverse_column : str
        MaxQuant decoy flag column

    Returns:
    --------
    PeptideSet : Copy with protein, contaminant and reverse columns added
    """
    result = pset.copy()
    fdata = result.feature_data

    if protein_column not in fdata.columns:
        raise ValueError(
            f"Protein column '{protein_column}' not found. "
            f"Available columns: {list(fdata.columns)[:10]}"
        )

    fdata["protein"] = fdata[protein_column].fillna("").astype(str)

    for source, target in [(contaminant_column, "contaminant"), (reverse_column, "reverse")]:
        if source in fdata.columns:
            fdata[target] = _flag_to_bool(fdata[source])
        else:
            warnings.warn(f"Column '{source}' not found - '{target}' set to False for all features")
            fdata[target] = False

    print(f"Annotated {len(fdata)} features: "
          f"{int(fdata['contaminant'].sum())} contaminants, {int(fdata['reverse'].sum())} reverse hits")

    result.log_step("Annotated protein, contaminant and reverse flags")
    return result


def add_site_only_flags(
    pset: PeptideSet,
    protein_groups: pd.DataFrame,
    protein_ids_column: str = "Protein IDs",
    site_column: str = "Only identified by site",
    protein_column: str = "protein",
    flag_name: str = "site_only",
) -> PeptideSet:
    """
    Transfer the "only identified by site" flag from the protein group table to features.

    Protein groups in the two MaxQuant tables need not agree, so both sides are
    decomposed into member accessions: a feature is flagged when any member of
    its group belongs to a flagged group in the protein group table.

    Parameters:
    -----------
    pset : PeptideSet
        Annotated dataset (see annotate_features())
    protein_groups : pd.DataFrame
        Table from load_protein_groups()
    protein_ids_column : str
        Column listing the members of each protein group
    site_column : str
        Flag column in the protein group table
    protein_column : str
        Feature annotation column holding the protein group
    flag_name : str
        Name of the feature annotation column to create

    Returns:
    --------
    PeptideSet : Copy with the flag column added
    """
    for col in (protein_ids_column, site_column):
        if col not in protein_groups.columns:
            raise ValueError(f"Column '{col}' not found in protein groups table")

    flagged_rows = _flag_to_bool(protein_groups[site_column])
    flagged_members = set()
    for group in protein_groups.loc[flagged_rows, protein_ids_column]:
        flagged_members.update(split_protein_group(group))

    result = pset.copy()
    result.feature_data[flag_name] = result.feature_data[protein_column].map(
        lambda group: any(member in flagged_members for member in split_protein_group(group))
    ).astype(bool)

    print(f"Flagged {int(result.feature_data[flag_name].sum())} features as '{flag_name}' "
          f"({len(flagged_members)} flagged accessions)")

    result.log_step(f"Added '{flag_name}' flags from protein groups table")
    return result


def add_species_flags(
    pset: PeptideSet,
    species: Dict[str, Iterable[str]],
    protein_column: str = "protein",
) -> PeptideSet:
    """
    Flag features by species of origin.

    Every feature gets one boolean column per species label, True when any
    member accession of its protein group is in that species' accession set.
    Features matching no set get False for every label.

    Parameters:
    -----------
    pset : PeptideSet
        Annotated dataset
    species : Dict[str, Iterable[str]]
        Species label -> accessions (e.g. from read_fasta_accessions())
    protein_column : str
        Feature annotation column holding the protein group

    Returns:
    --------
    PeptideSet : Copy with one boolean column per species
    """
    result = pset.copy()
    members = result.feature_data[protein_column].map(split_protein_group)

    for label, accessions in species.items():
        accession_set = set(accessions)
        result.feature_data[label] = members.map(
            lambda group: any(member in accession_set for member in group)
        ).astype(bool)
        print(f"  {label}: {int(result.feature_data[label].sum())} features")

    result.log_step(f"Added species flags: {list(species)}")
    return result


def assign_conditions(
    pset: PeptideSet,
    conditions: Optional[Union[Dict[str, str], pd.Series]] = None,
    pattern: Optional[str] = None,
    sample_annotation: Optional[pd.DataFrame] = None,
    column: str = "condition",
    annotation_column: Optional[str] = None,
) -> PeptideSet:
    """
    Attach an experimental condition to every sample.

    Exactly one source must be given:
    - conditions: mapping sample name -> condition
    - pattern: regular expression applied to sample names; the first capture
      group (or the whole match) is the condition
    - sample_annotation: table indexed by sample name; all of its columns are
      joined and annotation_column (default: column) provides the condition

    Raises:
    -------
    SampleMatchingError: If any sample cannot be assigned a condition
    """
    sources = [conditions is not None, pattern is not None, sample_annotation is not None]
    if sum(sources) != 1:
        raise ValueError("Provide exactly one of conditions, pattern or sample_annotation")

    result = pset.copy()
    samples = pd.Series(result.sample_names, index=result.exprs.columns)

    if conditions is not None:
        assigned = samples.map(dict(conditions))
    elif pattern is not None:
        regex = re.compile(pattern)

        def extract(name):
            match = regex.search(str(name))
            if match is None:
                return np.nan
            return match.group(1) if regex.groups else match.group(0)

        assigned = samples.map(extract)
    else:
        annotation_column = annotation_column or column
        if annotation_column not in sample_annotation.columns:
            raise ValueError(f"Column '{annotation_column}' not found in sample annotation")
        joined = sample_annotation.reindex(result.exprs.columns)
        for col in sample_annotation.columns:
            if col != annotation_column:
                result.sample_data[col] = joined[col].values
        assigned = joined[annotation_column]

    unresolved = [str(s) for s in assigned[assigned.isna()].index]
    if unresolved:
        raise SampleMatchingError(
            f"Could not assign a condition to {len(unresolved)} samples: "
            f"{unresolved[:5]}{'...' if len(unresolved) > 5 else ''}"
        )

    result.sample_data[column] = assigned.astype(str).values
    print(f"Conditions assigned: {result.sample_data[column].value_counts().to_dict()}")

    result.log_step(f"Assigned sample conditions to column '{column}'")
    return result


def mask_zero_intensities(pset: PeptideSet) -> PeptideSet:
    """Replace zero (non-detected) intensities with NaN."""
    result = pset.copy()
    n_zero = int((result.exprs == 0).sum().sum())
    result.exprs = result.exprs.mask(result.exprs == 0)
    print(f"Masked {n_zero:,} zero intensities as missing")
    result.log_step(f"Masked {n_zero} zero intensities")
    return result


def filter_flagged_features(
    pset: PeptideSet,
    flags: Sequence[str] = ("contaminant", "reverse", "site_only"),
) -> PeptideSet:
    """
    Remove features carrying any of the given boolean flags.

    Flags absent from the feature annotation are skipped with a warning.
    """

    print("=== FILTERING FLAGGED FEATURES ===\n")

    drop = pd.Series(False, index=pset.feature_data.index)
    for flag in flags:
        if flag not in pset.feature_data.columns:
            warnings.warn(f"Flag column '{flag}' not found - skipped")
            continue
        flagged = pset.feature_data[flag].astype(bool)
        print(f"  {flag}: {int(flagged.sum())} features")
        drop |= flagged

    result = pset.subset(features=~drop.values)
    print(f"Original features: {pset.n_features}")
    print(f"Removed: {int(drop.sum())} features")

    result.log_step(f"Removed {int(drop.sum())} features flagged as {list(flags)}")
    return result


def filter_multi_species_features(pset: PeptideSet, species_columns: Sequence[str]) -> PeptideSet:
    """Remove features whose protein group maps to more than one species."""
    missing = [col for col in species_columns if col not in pset.feature_data.columns]
    if missing:
        raise ValueError(f"Species columns not found: {missing}. Run add_species_flags() first.")

    n_species = pset.feature_data[list(species_columns)].astype(bool).sum(axis=1)
    ambiguous = n_species > 1

    result = pset.subset(features=~ambiguous.values)
    print(f"Removed {int(ambiguous.sum())} features assigned to multiple species")
    result.log_step(f"Removed {int(ambiguous.sum())} multi-species features")
    return result


def filter_smallest_protein_groups(
    pset: PeptideSet,
    protein_column: str = "protein",
    sep: str = ";",
) -> PeptideSet:
    """
    Keep only features whose protein group is a smallest group for all of its members.

    For each member accession the smallest protein group containing it is
    determined. A group survives only if it is such a smallest group for every
    one of its members; e.g. once "P1" exists as a group on its own, features
    mapped to "P1;P2" are removed. Features without a protein group are removed.

    Parameters:
    -----------
    pset : PeptideSet
        Annotated dataset
    protein_column : str
        Feature annotation column holding the protein group
    sep : str
        Member separator within protein groups

    Returns:
    --------
    PeptideSet : Filtered copy
    """

    print("=== FILTERING TO SMALLEST PROTEIN GROUPS ===\n")

    groups = pset.feature_data[protein_column].dropna().astype(str).unique()

    rows = []
    for group in groups:
        members = split_protein_group(group, sep)
        for member in members:
            rows.append({"group": group, "member": member, "size": len(members)})

    if rows:
        membership = pd.DataFrame(rows)
        membership["min_size"] = membership.groupby("member")["size"].transform("min")
        is_smallest = (membership["size"] == membership["min_size"]).groupby(membership["group"]).all()
        kept_groups = set(is_smallest[is_smallest].index)
    else:
        kept_groups = set()

    keep = pset.feature_data[protein_column].isin(kept_groups)
    result = pset.subset(features=keep.values)

    print(f"Protein groups: {len(groups)} -> {len(kept_groups)}")
    print(f"Features: {pset.n_features} -> {result.n_features}")

    result.log_step(
        f"Kept {len(kept_groups)} smallest protein groups ({result.n_features} features)"
    )
    return result


def filter_min_observations(
    pset: PeptideSet,
    protein_column: str = "protein",
    condition_column: str = "condition",
    min_samples: int = 2,
    min_feature_observations: int = 2,
) -> PeptideSet:
    """
    Iteratively remove under-observed protein/condition cells and features.

    Each pass (a) masks all intensities of a protein in a condition where the
    protein is observed in fewer than min_samples samples, then (b) drops
    features left with fewer than min_feature_observations intensities. Passes
    repeat until nothing changes; cells and rows are only ever removed, so the
    loop ends after at most one pass per matrix cell. Samples left without any
    observation are dropped at the end.

    Parameters:
    -----------
    pset : PeptideSet
        Dataset with protein and condition annotation
    protein_column : str
        Feature annotation column holding the protein group
    condition_column : str
        Sample annotation column holding the condition
    min_samples : int
        Minimum samples per (protein, condition) with an observation
    min_feature_observations : int
        Minimum observed intensities per feature

    Returns:
    --------
    PeptideSet : Filtered copy; applying the filter again changes nothing
    """

    print("=== ITERATIVE OBSERVATION FILTER ===\n")

    if protein_column not in pset.feature_data.columns:
        raise ValueError(f"Protein column '{protein_column}' not found in feature annotation")
    if condition_column not in pset.sample_data.columns:
        raise ConditionError(f"Condition column '{condition_column}' not found in sample annotation")

    sample_conditions = pset.sample_data[condition_column]
    if sample_conditions.isna().any():
        raise ConditionError(
            f"Samples without condition: {list(sample_conditions[sample_conditions.isna()].index)}"
        )

    proteins = pset.feature_data[protein_column]
    condition_values = sample_conditions.values
    exprs = pset.exprs.copy()

    unassigned = proteins.isna().values
    if unassigned.any():
        warnings.warn(
            f"Dropping {int(unassigned.sum())} features without a '{protein_column}' value"
        )
        exprs = exprs.loc[~unassigned]

    max_iterations = exprs.size + 1
    iteration = 0
    total_masked = 0

    while exprs.shape[0] > 0:
        iteration += 1
        if iteration > max_iterations:
            raise RuntimeError("Observation filter did not reach a fixed point")

        observed = exprs.notna()
        row_proteins = proteins.loc[exprs.index].values

        # Samples in which each protein has at least one observation, counted per condition
        protein_observed = observed.groupby(row_proteins).any()
        counts = protein_observed.T.groupby(condition_values).sum().T
        under_observed = counts < min_samples

        cell_mask = under_observed.loc[row_proteins, condition_values].values & observed.values
        n_masked = int(cell_mask.sum())
        if n_masked:
            exprs = exprs.mask(pd.DataFrame(cell_mask, index=exprs.index, columns=exprs.columns))
            total_masked += n_masked

        keep = exprs.notna().sum(axis=1) >= min_feature_observations
        n_dropped = int((~keep).sum())
        exprs = exprs.loc[keep.values]

        print(f"  Pass {iteration}: masked {n_masked} cells, dropped {n_dropped} features")

        if n_masked == 0 and n_dropped == 0:
            break

    sample_keep = exprs.notna().any(axis=0).values
    if exprs.shape[0] == 0:
        sample_keep = np.zeros(exprs.shape[1], dtype=bool)
    exprs = exprs.loc[:, sample_keep]

    result = PeptideSet(
        exprs=exprs,
        feature_data=pset.feature_data.loc[exprs.index].copy(),
        sample_data=pset.sample_data.loc[exprs.columns].copy(),
        processing=list(pset.processing),
    )

    print(f"\nFeatures: {pset.n_features} -> {result.n_features}")
    print(f"Samples: {pset.n_samples} -> {result.n_samples}")
    print(f"Cells masked: {total_masked:,}")

    result.log_step(
        f"Observation filter converged after {iteration} passes "
        f"(min {min_samples} samples per {protein_column}/{condition_column}, "
        f"min {min_feature_observations} observations per feature)"
    )
    return result


def assess_data_completeness(pset: PeptideSet, condition_column: Optional[str] = "condition") -> Dict[str, float]:
    """
    Assess and report data completeness across samples.

    Returns:
    --------
    Dict[str, float] : Overall statistics (total, observed, fraction observed)
    """

    print("=== ASSESSING DATA COMPLETENESS ===\n")

    observed = pset.exprs.notna()
    total_values = observed.size
    observed_values = int(observed.sum().sum())
    fraction = observed_values / total_values if total_values else 0.0

    print("Data completeness summary:")
    print(f"Total possible values: {total_values:,}")
    print(f"Observed values: {observed_values:,} ({fraction * 100:.1f}%)")

    print("\nPer-sample completeness:")
    for sample in pset.sample_names:
        n_obs = int(observed[sample].sum())
        if condition_column and condition_column in pset.sample_data.columns:
            group = pset.sample_data.loc[sample, condition_column]
        else:
            group = "Unknown"
        print(f"{sample}: {n_obs}/{pset.n_features} observed "
              f"({n_obs / max(pset.n_features, 1) * 100:.1f}%) - Condition: {group}")

    per_feature = observed.sum(axis=1)
    print("\nFeature detection summary:")
    print(f"Features observed in all samples: {int((per_feature == pset.n_samples).sum())}")
    print(f"Features observed in >50% samples: {int((per_feature > 0.5 * pset.n_samples).sum())}")

    return {
        "total_values": total_values,
        "observed_values": observed_values,
        "fraction_observed": fraction,
    }
