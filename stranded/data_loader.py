"""
Data Loading Module for the Stranded Patient Dataset
====================================================

Clinical Context:
-----------------
A "stranded" patient is an inpatient whose length of stay has passed a
threshold (commonly 7 days). Long stays are associated with deconditioning,
hospital-acquired infection and blocked beds, so flagging likely stranded
patients early lets discharge teams plan ahead.

Each record is one admission with:
- stranded.label: 'Stranded' / 'Not Stranded' (target)
- age, periods_of_previous_care: counts
- care.home.referral, medicallysafe, hcop, mental_health_care: 0/1 flags
- admit_date: admission date (day-first, e.g. 25/12/2020)
- frailty_index: categorical frailty marker

Source: NHS-R Community datasets (stranded_data)
"""

import pandas as pd
import numpy as np
from pathlib import Path
from typing import Optional, Union

from .config import DatasetSchema, STRANDED_SCHEMA
from .exceptions import DataError


FRAILTY_LEVELS = [
    "No index item",
    "Fall patient history",
    "Mobility problems",
    "Activity limitation",
    "Dementia",
]


def load_stranded_data(
    data_path: Union[str, Path],
    schema: DatasetSchema = STRANDED_SCHEMA,
    verbose: bool = True
) -> pd.DataFrame:
    """
    Load the stranded patient dataset from a CSV file.

    Parameters
    ----------
    data_path : str or Path
        Path to local CSV file.
    schema : DatasetSchema
        Expected target and predictor columns.
    verbose : bool, default=True
        Print a data summary after loading.

    Returns
    -------
    pd.DataFrame
        Validated dataset restricted to the schema columns, with incomplete
        records dropped and date columns parsed.

    Raises
    ------
    DataError
        If the file is missing, expected columns are absent, the target holds
        labels other than the two schema classes, or nothing is left after
        dropping incomplete records.
    """

    data_path = Path(data_path)
    if not data_path.exists():
        raise DataError(f"Data file not found: {data_path}")

    if verbose:
        print(f"Loading data from local file: {data_path}")
    df = pd.read_csv(data_path)

    df = prepare_dataset(df, schema=schema, verbose=verbose)

    if verbose:
        _print_data_summary(df, schema)

    return df


def prepare_dataset(
    df: pd.DataFrame,
    schema: DatasetSchema = STRANDED_SCHEMA,
    verbose: bool = False
) -> pd.DataFrame:
    """
    Validate raw rows against a schema and drop incomplete records.

    Date columns are parsed day-first; unparseable dates count as missing.
    """

    missing = schema.missing_columns(df.columns)
    if missing:
        raise DataError(
            f"Dataset is missing expected columns: {missing}. "
            f"Available columns: {list(df.columns)}"
        )

    df = df[schema.columns].copy()

    for col in schema.date_columns:
        if not pd.api.types.is_datetime64_any_dtype(df[col]):
            df[col] = pd.to_datetime(df[col], dayfirst=True, errors='coerce')

    n_before = len(df)
    df = df.dropna().reset_index(drop=True)
    if verbose and len(df) < n_before:
        print(f"Dropped {n_before - len(df):,} incomplete records")

    if df.empty:
        raise DataError("Dataset is empty after dropping incomplete records")

    labels = set(df[schema.target].unique())
    unexpected = labels - set(schema.class_labels)
    if unexpected:
        raise DataError(
            f"Target '{schema.target}' has unexpected labels {sorted(map(str, unexpected))}; "
            f"expected {list(schema.class_labels)}"
        )

    return df


def make_synthetic_stranded(
    n: int = 1000,
    positive_rate: float = 0.3,
    rng: Optional[np.random.Generator] = None,
    schema: DatasetSchema = STRANDED_SCHEMA
) -> pd.DataFrame:
    """
    Generate a synthetic stranded-patient dataset with a known class split.

    Exactly ``round(n * positive_rate)`` records are labelled 'Stranded'.
    Feature distributions are shifted by class so models have signal to
    learn: stranded patients skew older, frailer and more often referred
    to care homes.
    """

    if n <= 0:
        raise DataError(f"n must be positive, got {n}")
    if not 0 < positive_rate < 1:
        raise DataError(f"positive_rate must be in (0, 1), got {positive_rate}")

    rng = rng if rng is not None else np.random.default_rng(42)

    n_pos = int(round(n * positive_rate))
    is_stranded = np.zeros(n, dtype=bool)
    is_stranded[:n_pos] = True
    rng.shuffle(is_stranded)

    age = np.where(
        is_stranded,
        rng.normal(78, 9, n),
        rng.normal(62, 14, n)
    ).clip(18, 102).round().astype(int)

    def flag(p_pos: float, p_neg: float) -> np.ndarray:
        p = np.where(is_stranded, p_pos, p_neg)
        return (rng.random(n) < p).astype(int)

    frailty_pos = [0.25, 0.25, 0.2, 0.15, 0.15]
    frailty_neg = [0.55, 0.15, 0.12, 0.1, 0.08]
    frailty = np.where(
        is_stranded,
        rng.choice(FRAILTY_LEVELS, size=n, p=frailty_pos),
        rng.choice(FRAILTY_LEVELS, size=n, p=frailty_neg)
    )

    admit_date = pd.Timestamp("2020-01-01") + pd.to_timedelta(
        rng.integers(0, 730, size=n), unit="D"
    )

    df = pd.DataFrame({
        schema.target: np.where(is_stranded, schema.positive_class, schema.negative_class),
        "age": age,
        "care.home.referral": flag(0.45, 0.15),
        "medicallysafe": flag(0.55, 0.35),
        "hcop": flag(0.6, 0.3),
        "mental_health_care": flag(0.2, 0.1),
        "periods_of_previous_care": np.where(
            is_stranded, rng.poisson(3.0, n), rng.poisson(1.5, n)
        ),
        "admit_date": admit_date,
        "frailty_index": frailty,
    })

    return df


def class_counts(y: pd.Series) -> pd.Series:
    """Class frequencies, most frequent first."""
    return y.value_counts()


def _print_data_summary(df: pd.DataFrame, schema: DatasetSchema) -> None:
    """Print a summary of the loaded dataset."""

    print("\n" + "="*60)
    print("DATASET SUMMARY")
    print("="*60)
    print(f"Total admissions: {len(df):,}")
    print(f"Total predictors: {len(schema.predictors)}")
    print(f"Memory usage: {df.memory_usage(deep=True).sum() / 1e6:.2f} MB")

    print("\nStranded Distribution:")
    print(class_counts(df[schema.target]))

    stranded = (df[schema.target] == schema.positive_class).sum()
    print(f"\nStranded rate: {stranded/len(df)*100:.2f}%")

    print("="*60 + "\n")
