"""
Data Import Module for Proteomics Differential Expression Toolkit

Functions for loading MaxQuant peptide and protein-group tables, sample
annotation files and FASTA headers used for species lookup.
"""

import gzip
import os
import re
from typing import Dict, List, Optional, Set

import numpy as np
import pandas as pd

from .dataset import PeptideSet


def identify_intensity_columns(columns: List[str], prefix: str = "Intensity ") -> List[str]:
    """
    Find the per-sample intensity columns of a MaxQuant table.

    Parameters:
    -----------
    columns : List[str]
        Column names of the table
    prefix : str
        Name prefix shared by the sample intensity columns. The bare total
        column (the prefix without its trailing separator) is never selected.

    Returns:
    --------
    List[str] : Intensity column names, in file order
    """
    bare = prefix.rstrip(" ._")
    return [
        col for col in columns
        if str(col).startswith(prefix) and str(col) != bare and len(str(col)) > len(prefix)
    ]


def load_maxquant_peptides(
    peptide_file: str,
    intensity_prefix: str = "Intensity ",
    feature_column: str = "Sequence",
) -> PeptideSet:
    """
    Load a MaxQuant peptides.txt file into a PeptideSet.

    Parameters:
    -----------
    peptide_file : str
        Path to the tab-delimited peptides file
    intensity_prefix : str
        Prefix identifying sample intensity columns (e.g. "Intensity ")
    feature_column : str
        Column holding the feature identifier (peptide sequence)

    Returns:
    --------
    PeptideSet : Raw intensities with every non-intensity column as feature annotation
    """

    print("=== LOADING MAXQUANT PEPTIDES ===\n")

    if not os.path.exists(peptide_file):
        raise FileNotFoundError(f"Peptide file not found: {peptide_file}")

    try:
        raw = pd.read_csv(peptide_file, sep="\t", low_memory=False)
    except Exception as e:
        raise ValueError(f"Error loading peptide file: {e}") from e

    print(f"✓ Loaded peptide table: {raw.shape}")

    intensity_columns = identify_intensity_columns(list(raw.columns), intensity_prefix)
    if not intensity_columns:
        raise ValueError(
            f"No intensity columns starting with '{intensity_prefix}' found in {peptide_file}"
        )

    if feature_column in raw.columns:
        feature_ids = raw[feature_column].astype(str)
    else:
        print(f"Warning: Feature column '{feature_column}' not found - using row numbers")
        feature_ids = pd.Series([f"feature_{i}" for i in range(len(raw))])

    # Duplicated sequences (e.g. modified forms) get a numeric suffix
    if feature_ids.duplicated().any():
        counts = feature_ids.groupby(feature_ids).cumcount()
        feature_ids = feature_ids.where(counts == 0, feature_ids + "_" + counts.astype(str))

    sample_names = [col[len(intensity_prefix):].strip() for col in intensity_columns]

    exprs = raw[intensity_columns].apply(pd.to_numeric, errors="coerce").astype(float)
    exprs.columns = sample_names
    exprs.index = pd.Index(feature_ids.values, name=None)

    feature_data = raw.drop(columns=intensity_columns).copy()
    feature_data.index = exprs.index

    sample_data = pd.DataFrame(index=pd.Index(sample_names))

    print(f"✓ Found {len(sample_names)} intensity columns")
    print(f"✓ Features: {len(exprs)}")

    pset = PeptideSet(exprs=exprs, feature_data=feature_data, sample_data=sample_data)
    pset.log_step(f"Loaded {len(exprs)} features x {len(sample_names)} samples from {peptide_file}")
    return pset


def load_protein_groups(protein_groups_file: str) -> pd.DataFrame:
    """
    Load a MaxQuant proteinGroups.txt file.

    Parameters:
    -----------
    protein_groups_file : str
        Path to the tab-delimited protein groups file

    Returns:
    --------
    pd.DataFrame : Protein group table
    """
    if not os.path.exists(protein_groups_file):
        raise FileNotFoundError(f"Protein groups file not found: {protein_groups_file}")

    try:
        protein_groups = pd.read_csv(protein_groups_file, sep="\t", low_memory=False)
    except Exception as e:
        raise ValueError(f"Error loading protein groups file: {e}") from e

    print(f"✓ Loaded protein groups: {protein_groups.shape}")
    return protein_groups


def load_sample_annotation(annotation_file: str, sample_column: str = "Sample") -> pd.DataFrame:
    """
    Load a sample annotation table (csv, or tab-delimited for .tsv/.txt).

    Returns:
    --------
    pd.DataFrame : Annotation indexed by sample name
    """
    if not os.path.exists(annotation_file):
        raise FileNotFoundError(f"Sample annotation file not found: {annotation_file}")

    sep = "\t" if annotation_file.lower().endswith((".tsv", ".txt")) else ","
    annotation = pd.read_csv(annotation_file, sep=sep)

    if sample_column not in annotation.columns:
        raise ValueError(
            f"Sample column '{sample_column}' not found in {annotation_file}. "
            f"Available columns: {list(annotation.columns)}"
        )

    annotation[sample_column] = annotation[sample_column].astype(str).str.strip()
    print(f"✓ Loaded sample annotation: {annotation.shape}")
    return annotation.set_index(sample_column)


def parse_uniprot_identifier(protein_id: str) -> Dict[str, str]:
    """
    Parse UniProt identifier from a protein column or FASTA header.

    Handles formats like: sp|P12345|PROT_HUMAN -> P12345

    Parameters:
    -----------
    protein_id : str
        Protein identifier string

    Returns:
    --------
    dict with keys: accession, database, entry_name
    """
    if protein_id is None or (isinstance(protein_id, float) and np.isnan(protein_id)):
        return {'accession': '', 'database': '', 'entry_name': ''}

    protein_id = str(protein_id).strip().lstrip('>')

    # Pattern: sp|P12345|PROT_HUMAN or tr|Q9ABC1|Q9ABC1_MOUSE (header text may follow)
    match = re.match(r'^(sp|tr)\|([A-Z0-9-]+)\|([A-Za-z0-9_]+)', protein_id)
    if match:
        db = 'SwissProt' if match.group(1) == 'sp' else 'TrEMBL'
        return {
            'accession': match.group(2),
            'database': db,
            'entry_name': match.group(3)
        }

    # If no match, try to find accession pattern
    acc_match = re.search(r'([A-Z][A-Z0-9]{5,9}(?:-\d+)?)', protein_id)
    if acc_match:
        return {
            'accession': acc_match.group(1),
            'database': '',
            'entry_name': ''
        }

    return {'accession': '', 'database': '', 'entry_name': ''}


def read_fasta_accessions(fasta_file: str) -> Set[str]:
    """
    Collect protein accessions from the header lines of a FASTA file.

    Only headers are read; sequences are skipped. Files ending in .gz are
    decompressed on the fly.

    Parameters:
    -----------
    fasta_file : str
        Path to a FASTA file (plain or gzip compressed)

    Returns:
    --------
    Set[str] : Accessions found in the headers
    """
    if not os.path.exists(fasta_file):
        raise FileNotFoundError(f"FASTA file not found: {fasta_file}")

    opener = gzip.open if fasta_file.endswith(".gz") else open
    accessions = set()

    with opener(fasta_file, "rt", encoding="utf-8") as handle:
        for line in handle:
            if not line.startswith(">"):
                continue
            parsed = parse_uniprot_identifier(line[1:])
            accession = parsed['accession'] or line[1:].split()[0]
            if accession:
                accessions.add(accession)

    print(f"✓ Read {len(accessions)} accessions from {os.path.basename(fasta_file)}")
    return accessions


def clean_sample_names(sample_names: List[str], common_prefix: Optional[str] = None) -> Dict[str, str]:
    """
    Strip a shared prefix from sample names.

    Parameters:
    -----------
    sample_names : List[str]
        Original sample names
    common_prefix : str, optional
        Prefix to remove. If None, the longest common prefix is detected,
        trimmed back to the last separator so names are not cut mid-token.

    Returns:
    --------
    Dict[str, str] : Mapping original name -> cleaned name
    """
    if not sample_names:
        return {}

    if common_prefix is None:
        common_prefix = os.path.commonprefix(list(sample_names))
        cut = max(common_prefix.rfind(sep) for sep in ("_", "-", ".", " "))
        common_prefix = common_prefix[:cut + 1] if cut >= 0 else ""

    cleaned = {}
    for name in sample_names:
        new_name = name[len(common_prefix):] if name.startswith(common_prefix) else name
        cleaned[name] = new_name or name

    if len(set(cleaned.values())) != len(cleaned):
        # Prefix removal would merge samples; keep the originals
        return {name: name for name in sample_names}

    return cleaned
