"""
Pytest configuration and fixtures for proteomics_de_toolkit tests
"""

import gzip
import os

import numpy as np
import pandas as pd
import pytest

from proteomics_de_toolkit.dataset import PeptideSet
from proteomics_de_toolkit.statistical_analysis import StatisticalConfig


SAMPLE_NAMES = ["A_1", "A_2", "A_3", "B_1", "B_2", "B_3"]
CONDITIONS = ["A", "A", "A", "B", "B", "B"]

# (feature, protein group, peptide offset)
PEPTIDES = [
    ("PEPTIDEA", "P1", 0.0),
    ("PEPTIDEB", "P1", 1.0),
    ("PEPTIDEC", "P1", -0.5),
    ("PEPTIDED", "P2", 0.3),
    ("PEPTIDEE", "P2", -0.2),
    ("PEPTIDEF", "P3", 0.0),
    ("PEPTIDEG", "P1;P4", 0.1),
]

# Log2 fold change B vs A per protein group
EFFECTS = {"P1": 2.0, "P2": 0.0, "P3": 1.5, "P1;P4": 0.0}


@pytest.fixture
def peptide_set():
    """Log-scale peptide set: 7 peptides of 4 protein groups x 6 samples in 2 conditions"""
    np.random.seed(42)

    values = np.zeros((len(PEPTIDES), len(SAMPLE_NAMES)))
    for i, (_, protein, offset) in enumerate(PEPTIDES):
        for j, condition in enumerate(CONDITIONS):
            effect = EFFECTS[protein] if condition == "B" else 0.0
            values[i, j] = 20 + offset + effect + np.random.normal(0, 0.1)

    features = [name for name, _, _ in PEPTIDES]
    exprs = pd.DataFrame(values, index=features, columns=SAMPLE_NAMES)
    feature_data = pd.DataFrame(
        {
            "protein": [protein for _, protein, _ in PEPTIDES],
            "contaminant": False,
            "reverse": False,
        },
        index=features,
    )
    sample_data = pd.DataFrame({"condition": CONDITIONS}, index=SAMPLE_NAMES)

    return PeptideSet(exprs=exprs, feature_data=feature_data, sample_data=sample_data)


@pytest.fixture
def raw_peptide_set(peptide_set):
    """Same design on the raw intensity scale, with a few zeros (non-detections)"""
    exprs = 2 ** peptide_set.exprs
    exprs.iloc[0, 0] = 0.0
    exprs.iloc[3, 4] = 0.0
    return PeptideSet(
        exprs=exprs,
        feature_data=peptide_set.feature_data.copy(),
        sample_data=peptide_set.sample_data.copy(),
    )


@pytest.fixture
def statistical_config():
    """Default configuration for the fixture data"""
    config = StatisticalConfig()
    config.mode = "summarize_model"
    config.group_vars = ["protein"]
    config.contrasts = "condition"
    config.q_value_threshold = 0.05
    return config


@pytest.fixture
def maxquant_files(tmp_path):
    """Write small MaxQuant-style peptides.txt, proteinGroups.txt and FASTA files"""
    peptides = pd.DataFrame(
        {
            "Sequence": ["AAAK", "CCCK", "DDDK", "EEEK", "FFFK"],
            "Proteins": ["P1", "P1", "P2;P3", "CON__P9", "REV__P8"],
            "Potential contaminant": ["", "", "", "+", ""],
            "Reverse": ["", "", "", "", "+"],
            "Intensity": [600.0, 700.0, 800.0, 900.0, 1000.0],
            "Intensity Ctrl_1": [100.0, 0.0, 300.0, 400.0, 500.0],
            "Intensity Ctrl_2": [110.0, 210.0, 310.0, 410.0, 510.0],
            "Intensity Treat_1": [120.0, 220.0, 0.0, 420.0, 520.0],
            "Intensity Treat_2": [130.0, 230.0, 330.0, 430.0, 530.0],
        }
    )
    peptide_file = os.path.join(tmp_path, "peptides.txt")
    peptides.to_csv(peptide_file, sep="\t", index=False)

    protein_groups = pd.DataFrame(
        {
            "Protein IDs": ["P1", "P2", "P3;P5"],
            "Only identified by site": ["", "", "+"],
        }
    )
    protein_groups_file = os.path.join(tmp_path, "proteinGroups.txt")
    protein_groups.to_csv(protein_groups_file, sep="\t", index=False)

    fasta_file = os.path.join(tmp_path, "human.fasta.gz")
    with gzip.open(fasta_file, "wt", encoding="utf-8") as handle:
        handle.write(">sp|P1|PROT1_HUMAN Protein one OS=Homo sapiens\nMKAAAK\n")
        handle.write(">sp|P2|PROT2_HUMAN Protein two OS=Homo sapiens\nMKDDDK\n")

    return {
        "peptides": peptide_file,
        "protein_groups": protein_groups_file,
        "fasta": fasta_file,
    }
