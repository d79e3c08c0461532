"""
Dataset Module for Proteomics Differential Expression Toolkit

Container pairing a feature x sample intensity matrix with its feature
(peptide) and sample annotations.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np
import pandas as pd


@dataclass
class PeptideSet:
    """
    Intensity matrix with per-feature and per-sample annotation.

    Attributes:
    -----------
    exprs : pd.DataFrame
        Features (rows) x samples (columns); NaN marks a missing intensity
    feature_data : pd.DataFrame
        One row per feature, indexed like exprs.index
    sample_data : pd.DataFrame
        One row per sample, indexed like exprs.columns
    processing : List[str]
        Processing history, one line per step
    """

    exprs: pd.DataFrame
    feature_data: pd.DataFrame
    sample_data: pd.DataFrame
    processing: List[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.exprs.index.equals(self.feature_data.index):
            raise ValueError(
                "feature_data index does not match the rows of exprs "
                f"({len(self.feature_data)} vs {len(self.exprs)} features)"
            )
        if not self.exprs.columns.equals(self.sample_data.index):
            raise ValueError(
                "sample_data index does not match the columns of exprs "
                f"({len(self.sample_data)} vs {self.exprs.shape[1]} samples)"
            )

    @property
    def n_features(self) -> int:
        return self.exprs.shape[0]

    @property
    def n_samples(self) -> int:
        return self.exprs.shape[1]

    @property
    def sample_names(self) -> List[str]:
        return list(self.exprs.columns)

    def copy(self) -> "PeptideSet":
        return PeptideSet(
            exprs=self.exprs.copy(),
            feature_data=self.feature_data.copy(),
            sample_data=self.sample_data.copy(),
            processing=list(self.processing),
        )

    def log_step(self, message: str) -> None:
        self.processing.append(message)

    def subset(
        self,
        features: Optional[Sequence] = None,
        samples: Optional[Sequence] = None,
    ) -> "PeptideSet":
        """
        Return a new set restricted to the given features and/or samples.

        Parameters:
        -----------
        features : sequence or boolean mask, optional
            Feature labels (or a boolean mask over exprs.index) to keep
        samples : sequence or boolean mask, optional
            Sample labels (or a boolean mask over exprs.columns) to keep

        Returns:
        --------
        PeptideSet : Subset; the original is left untouched
        """
        row_index = self.exprs.index
        col_index = self.exprs.columns

        if features is not None:
            features = np.asarray(features)
            if features.dtype == bool:
                row_index = self.exprs.index[features]
            else:
                row_index = pd.Index(features)
            unknown = row_index.difference(self.exprs.index)
            if len(unknown) > 0:
                raise KeyError(f"Unknown features: {list(unknown[:5])}")

        if samples is not None:
            samples = np.asarray(samples)
            if samples.dtype == bool:
                col_index = self.exprs.columns[samples]
            else:
                col_index = pd.Index(samples)
            unknown = col_index.difference(self.exprs.columns)
            if len(unknown) > 0:
                raise KeyError(f"Unknown samples: {list(unknown[:5])}")

        return PeptideSet(
            exprs=self.exprs.loc[row_index, col_index].copy(),
            feature_data=self.feature_data.loc[row_index].copy(),
            sample_data=self.sample_data.loc[col_index].copy(),
            processing=list(self.processing),
        )

    def to_long(
        self,
        feature_vars: Optional[List[str]] = None,
        sample_vars: Optional[List[str]] = None,
    ) -> pd.DataFrame:
        """
        Convert to the long observation table used for summarization and modeling.

        Parameters:
        -----------
        feature_vars : list of str, optional
            Feature annotation columns to carry along (default: all)
        sample_vars : list of str, optional
            Sample annotation columns to carry along (default: all)

        Returns:
        --------
        pd.DataFrame : One row per observed (feature, sample) cell with columns
            feature, sample, expression followed by the requested annotations
        """
        if feature_vars is None:
            feature_vars = list(self.feature_data.columns)
        if sample_vars is None:
            sample_vars = list(self.sample_data.columns)

        exprs = self.exprs.copy()
        exprs.index.name = "feature"
        exprs.columns.name = None

        long_df = exprs.reset_index().melt(
            id_vars="feature", var_name="sample", value_name="expression"
        )
        long_df = long_df.dropna(subset=["expression"])

        if feature_vars:
            feature_annotation = self.feature_data[feature_vars].copy()
            feature_annotation.index.name = "feature"
            long_df = long_df.merge(
                feature_annotation.reset_index(), on="feature", how="left"
            )
        if sample_vars:
            sample_annotation = self.sample_data[sample_vars].copy()
            sample_annotation.index.name = "sample"
            long_df = long_df.merge(
                sample_annotation.reset_index(), on="sample", how="left"
            )

        return long_df.reset_index(drop=True)
