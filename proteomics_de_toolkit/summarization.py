"""
Summarization Module for Proteomics Differential Expression Toolkit

Collapse the peptide intensities of a protein group into one protein-level
value per sample.

Every summarization method takes the long observation rows of one group
(columns feature, sample, expression) and returns a Series indexed by sample.
"""

import warnings
from typing import Callable, Dict, List, Sequence, Union

import numpy as np
import pandas as pd
import statsmodels.api as sm
from joblib import Parallel, delayed

from .dataset import PeptideSet


def _observed_rows(data: pd.DataFrame) -> pd.DataFrame:
    missing = [col for col in ("feature", "sample", "expression") if col not in data.columns]
    if missing:
        raise ValueError(f"Summarization input is missing columns: {missing}")
    return data.dropna(subset=["expression"])


def robust_summary(data: pd.DataFrame, maxiter: int = 50) -> pd.Series:
    """
    Robust M-estimation of per-sample protein abundance.

    Fits expression ~ 0 + sample + feature by iteratively reweighted least
    squares with Huber's psi (k = 1.345) and MAD scale, and returns the sample
    coefficients. Peptides with outlying intensities are down-weighted rather
    than discarded. A group with a single feature returns that feature's values.

    Parameters:
    -----------
    data : pd.DataFrame
        Long rows of one protein group: feature, sample, expression
    maxiter : int
        Maximum IRLS iterations

    Returns:
    --------
    pd.Series : Summarized expression indexed by sample
    """
    data = _observed_rows(data)
    if data.empty:
        return pd.Series(dtype=float, name="expression")

    if data["feature"].nunique() == 1:
        return data.groupby("sample", sort=True)["expression"].mean().rename("expression")

    sample_design = pd.get_dummies(data["sample"].astype(str), dtype=float)
    feature_design = pd.get_dummies(data["feature"].astype(str), prefix="feature",
                                    drop_first=True, dtype=float)
    design = pd.concat([sample_design, feature_design], axis=1)

    with warnings.catch_warnings():
        warnings.filterwarnings("ignore", category=RuntimeWarning)
        fit = sm.RLM(
            data["expression"].values.astype(float),
            design.values,
            M=sm.robust.norms.HuberT(),
        ).fit(maxiter=maxiter, scale_est="mad")

    params = pd.Series(fit.params, index=design.columns)
    return params[sample_design.columns].rename("expression")


def median_polish_summary(data: pd.DataFrame, max_iter: int = 10, tol: float = 1e-4) -> pd.Series:
    """
    Tukey median polish of the feature x sample matrix of one group.

    Model: y_ij = mu + alpha_i + beta_j + e_ij. Returns mu + beta_j, the
    per-sample abundance on the scale of the input.
    """
    data = _observed_rows(data)
    if data.empty:
        return pd.Series(dtype=float, name="expression")

    matrix = data.pivot_table(index="feature", columns="sample", values="expression", aggfunc="mean")
    residuals = matrix.values.astype(float)
    overall = 0.0
    col_effects = np.zeros(residuals.shape[1])

    for _ in range(max_iter):
        old_residuals = residuals.copy()

        row_medians = np.nanmedian(residuals, axis=1)
        residuals = residuals - row_medians[:, np.newaxis]
        overall += np.nanmedian(row_medians)

        col_medians = np.nanmedian(residuals, axis=0)
        residuals = residuals - col_medians[np.newaxis, :]
        col_effects += col_medians - np.nanmedian(col_medians)
        overall += np.nanmedian(col_medians)

        if np.nanmax(np.abs(residuals - old_residuals)) < tol:
            break

    return pd.Series(overall + col_effects, index=matrix.columns, name="expression")


def median_summary(data: pd.DataFrame) -> pd.Series:
    """Median of the observed feature intensities per sample."""
    data = _observed_rows(data)
    return data.groupby("sample", sort=True)["expression"].median().rename("expression")


SUMMARIZATION_METHODS: Dict[str, Callable[[pd.DataFrame], pd.Series]] = {
    "robust": robust_summary,
    "median_polish": median_polish_summary,
    "median": median_summary,
}


def get_summarization_method(
    method: Union[str, Callable[[pd.DataFrame], pd.Series]]
) -> Callable[[pd.DataFrame], pd.Series]:
    """
    Resolve a summarization method by name, or pass a callable through.

    Raises:
    -------
    ValueError: If the name is not registered
    """
    if callable(method):
        return method
    if method not in SUMMARIZATION_METHODS:
        raise ValueError(
            f"Unknown summarization method: {method}. Choose from {list(SUMMARIZATION_METHODS)}"
        )
    return SUMMARIZATION_METHODS[method]


def summarize_group(data: pd.DataFrame, method="robust") -> pd.DataFrame:
    """
    Summarize one protein group to a (sample, expression) table.

    Returns:
    --------
    pd.DataFrame : Columns sample, expression; samples without observations are absent
    """
    summary = get_summarization_method(method)(data)
    summary = summary.dropna()
    return pd.DataFrame({"sample": summary.index.astype(str), "expression": summary.values})


def _summarize_chunk(chunk, method):
    return [
        (key, summarize_group(group_data, method), group_data["feature"].nunique())
        for key, group_data in chunk
    ]


def summarize_peptides(
    pset: PeptideSet,
    group_vars: Sequence[str] = ("protein",),
    method="robust",
    n_jobs: int = 1,
) -> PeptideSet:
    """
    Summarize peptide intensities to one row per protein group.

    Parameters:
    -----------
    pset : PeptideSet
        Log-scale, filtered peptide dataset
    group_vars : sequence of str
        Feature annotation columns defining a group; all are kept as the
        feature annotation of the result
    method : str or callable
        Name in SUMMARIZATION_METHODS or a callable with the same contract
    n_jobs : int
        Number of parallel workers (joblib); groups are independent

    Returns:
    --------
    PeptideSet : Protein-level dataset, features named by the first group variable
    """

    print("=== SUMMARIZING PEPTIDES TO PROTEINS ===\n")

    group_vars = list(group_vars)
    missing = [col for col in group_vars if col not in pset.feature_data.columns]
    if missing:
        raise ValueError(f"Grouping columns not found in feature annotation: {missing}")

    get_summarization_method(method)
    long_df = pset.to_long(feature_vars=group_vars, sample_vars=[])
    groups = list(long_df.groupby(group_vars, sort=True))

    print(f"Method: {method if isinstance(method, str) else getattr(method, '__name__', 'custom')}")
    print(f"Protein groups: {len(groups)}")

    n_chunks = max(1, min(len(groups), n_jobs * 4 if n_jobs and n_jobs > 0 else 4))
    chunks = [groups[i::n_chunks] for i in range(n_chunks)]
    chunk_results = Parallel(n_jobs=n_jobs)(
        delayed(_summarize_chunk)(chunk, method) for chunk in chunks
    )

    summaries = {}
    n_features = {}
    for chunk_result in chunk_results:
        for key, summary, n_group_features in chunk_result:
            key = key if isinstance(key, tuple) else (key,)
            summaries[key] = summary.set_index("sample")["expression"]
            n_features[key] = n_group_features

    keys: List[tuple] = sorted(summaries, key=lambda k: tuple(str(v) for v in k))
    feature_names = pd.Index(
        [str(k[0]) if len(k) == 1 else "|".join(map(str, k)) for k in keys], dtype=object
    )

    exprs = pd.DataFrame(
        np.array([summaries[k].reindex(pset.exprs.columns.astype(str)).values for k in keys],
                 dtype=float).reshape(len(keys), pset.n_samples),
        index=feature_names,
        columns=pset.exprs.columns,
    )

    feature_data = pd.DataFrame(keys, columns=group_vars, index=feature_names)
    feature_data["n_features"] = [n_features[k] for k in keys]

    result = PeptideSet(
        exprs=exprs,
        feature_data=feature_data,
        sample_data=pset.sample_data.copy(),
        processing=list(pset.processing),
    )

    print(f"✓ Summarized {pset.n_features} features into {result.n_features} protein groups")
    result.log_step(f"Summarized to {result.n_features} protein groups with '{method}'")
    return result
