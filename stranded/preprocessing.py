"""
Feature Recipe Module
=====================

Clinical Context:
-----------------
Preprocessing statistics (category levels, means, standard deviations)
must be learned from Training data only. Learning them from Holdout
rows leaks information about the patients we later claim to evaluate
"blind", and inflates reported performance.

Recipe Steps (fixed order):
1. Date decomposition: admit_date -> day-of-week and month categories
   (discharge planning has strong weekday and seasonal effects); the raw
   date and any configured drop columns are removed
2. Class rebalancing: random oversampling of Stranded admissions, applied
   to the data the recipe is fit on and never to assessment/Holdout data
3. One-hot encoding of categorical predictors (all levels kept)
4. Zero-variance filter
5. Centering and scaling

Unseen categorical levels at apply time are zero-encoded by default
(every dummy column of that variable is 0). Set unseen_levels='error' to
raise a DataError instead.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Tuple, Union

import numpy as np
import pandas as pd
from imblearn.over_sampling import RandomOverSampler

from .config import DatasetSchema, STRANDED_SCHEMA, make_rng, draw_seed
from .exceptions import DataError, FitError


DATE_FEATURES = ("dow", "month")
UNSEEN_LEVEL_POLICIES = ("zero", "error")


def minority_ratio(y: pd.Series) -> float:
    """
    Share of the minority class: (# minority) / (# total).

    This is the constant the rebalancing step targets. It is computed once
    on the unbalanced Training data and reused for every fold.
    """

    counts = y.value_counts()
    if len(counts) < 2:
        raise DataError(
            f"Need two classes to compute a minority ratio, found {list(counts.index)}"
        )
    return float(counts.min() / counts.sum())


def encode_target(y: pd.Series, schema: DatasetSchema = STRANDED_SCHEMA) -> pd.Series:
    """Binary target: 1 = positive class (Stranded), 0 otherwise."""
    return (y == schema.positive_class).astype(int)


def clean_feature_name(name: str) -> str:
    # XGBoost rejects '[', ']' and '<' in feature names
    return re.sub(r'[^0-9A-Za-z_.]+', '_', str(name)).strip('_')


@dataclass(frozen=True)
class FeatureRecipe:
    """
    Unfit, immutable preprocessing specification.

    Parameters
    ----------
    schema : DatasetSchema
        Target, predictors, date and drop columns.
    over_ratio : float, optional
        Target minority/majority ratio for oversampling. None disables the
        rebalancing step.
    unseen_levels : {'zero', 'error'}
        Policy for categorical levels that were not seen at fit time.
    normalize : bool, default=True
        Whether to center and scale predictors.
    """
    schema: DatasetSchema = STRANDED_SCHEMA
    over_ratio: Optional[float] = None
    unseen_levels: str = "zero"
    normalize: bool = True
    date_features: Tuple[str, ...] = DATE_FEATURES

    def __post_init__(self):
        if self.unseen_levels not in UNSEEN_LEVEL_POLICIES:
            raise DataError(
                f"unseen_levels must be one of {UNSEEN_LEVEL_POLICIES}, got '{self.unseen_levels}'"
            )
        if self.over_ratio is not None and not 0 < self.over_ratio <= 1:
            raise DataError(f"over_ratio must be in (0, 1], got {self.over_ratio}")

    def with_over_ratio(self, over_ratio: Optional[float]) -> "FeatureRecipe":
        return replace(self, over_ratio=over_ratio)

    def fit(
        self,
        training: pd.DataFrame,
        rng: Union[int, np.random.Generator, None] = None,
        verbose: bool = False
    ) -> "PreparedRecipe":
        """
        Learn all recipe statistics from ``training``.

        Parameters
        ----------
        training : pd.DataFrame
            Rows with the target and every predictor.
        rng : int or np.random.Generator, optional
            Drives the oversampling draw.
        verbose : bool, default=False
            Print a step-by-step report.

        Returns
        -------
        PreparedRecipe
            Fitted recipe; its ``training_data``/``training_target`` hold the
            rebalanced, transformed fit data.
        """

        schema = self.schema
        _check_columns(training, [schema.target, *schema.predictors])
        if len(training) == 0:
            raise DataError("Cannot fit a recipe on empty data")

        # Step 1: Date decomposition and column removal
        df = decompose_dates(training, schema, self.date_features)
        y = encode_target(training[schema.target], schema)
        df = df.drop(columns=[schema.target])

        # Step 2: Class rebalancing
        df, y, n_added = _oversample(df, y, self.over_ratio, make_rng(rng))
        if verbose:
            print(f"Step 2: Oversampling added {n_added:,} minority rows "
                  f"(target ratio: {self.over_ratio})")

        # Step 3: Categorical encoding
        categorical = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])
                       or pd.api.types.is_bool_dtype(df[c])]
        levels = {c: sorted(df[c].astype(str).unique().tolist()) for c in categorical}
        encoded = _encode(df, levels)

        # Step 4: Zero-variance filter
        zero_var = [c for c in encoded.columns if encoded[c].nunique(dropna=False) <= 1]
        encoded = encoded.drop(columns=zero_var)
        if encoded.shape[1] == 0:
            raise FitError("No predictors left after the zero-variance filter")
        if verbose and zero_var:
            print(f"Step 4: Removed zero-variance predictors: {zero_var}")

        # Step 5: Normalization
        if self.normalize:
            means = encoded.mean().to_dict()
            stds = encoded.std().to_dict()
        else:
            means, stds = {}, {}

        prepared = PreparedRecipe(
            recipe=self,
            levels=levels,
            feature_columns=list(encoded.columns),
            zero_variance=zero_var,
            means=means,
            stds=stds,
            n_oversampled=n_added,
            training_data=_scale(encoded, means, stds),
            training_target=y,
        )

        if verbose:
            print(f"Recipe fit complete: {len(prepared.feature_columns)} features, "
                  f"{len(y):,} training rows")

        return prepared


@dataclass(frozen=True)
class PreparedRecipe:
    """A FeatureRecipe with every statistic learned; applies, never re-learns."""
    recipe: FeatureRecipe
    levels: Dict[str, List[str]]
    feature_columns: List[str]
    zero_variance: List[str]
    means: Dict[str, float]
    stds: Dict[str, float]
    n_oversampled: int
    training_data: pd.DataFrame = field(repr=False)
    training_target: pd.Series = field(repr=False)

    @property
    def schema(self) -> DatasetSchema:
        return self.recipe.schema

    def juice(self) -> Tuple[pd.DataFrame, pd.Series]:
        """Transformed (and rebalanced) fit data."""
        return self.training_data, self.training_target

    def apply(self, data: pd.DataFrame) -> pd.DataFrame:
        """
        Transform new data with fit-time statistics.

        Rebalancing is skipped, so the row count and index are preserved.
        The output always has exactly ``feature_columns``.
        """

        schema = self.schema
        _check_columns(data, list(schema.predictors))

        df = decompose_dates(data, schema, self.recipe.date_features)
        if schema.target in df.columns:
            df = df.drop(columns=[schema.target])

        if self.recipe.unseen_levels == "error":
            for col, known in self.levels.items():
                unseen = set(df[col].astype(str).unique()) - set(known)
                if unseen:
                    raise DataError(
                        f"Column '{col}' has levels not seen during fit: {sorted(unseen)}"
                    )

        encoded = _encode(df, self.levels)
        encoded = encoded.reindex(columns=self.feature_columns, fill_value=0)
        return _scale(encoded, self.means, self.stds)

    bake = apply

    def target(self, data: pd.DataFrame) -> pd.Series:
        """Binary-encoded target of ``data``."""
        _check_columns(data, [self.schema.target])
        return encode_target(data[self.schema.target], self.schema)



def decompose_dates(
    df: pd.DataFrame,
    schema: DatasetSchema,
    features: Tuple[str, ...] = DATE_FEATURES
) -> pd.DataFrame:
    """
    Replace each date column with categorical day-of-week / month features.

    Also removes the schema's drop columns and any non-schema columns.
    """

    keep = [c for c in df.columns if c == schema.target or c in schema.predictors]
    out = df[keep].copy()

    for col in schema.date_columns:
        if col not in out.columns:
            continue
        dates = pd.to_datetime(out[col], dayfirst=True, errors='coerce')
        if dates.isna().any():
            raise DataError(f"Date column '{col}' has missing or unparseable values")
        if "dow" in features:
            out[f"{col}_dow"] = dates.dt.day_name().str[:3]
        if "month" in features:
            out[f"{col}_month"] = dates.dt.month_name().str[:3]
        out = out.drop(columns=[col])

    drop = [c for c in schema.drop_columns if c in out.columns]
    return out.drop(columns=drop)


def _encode(df: pd.DataFrame, levels: Dict[str, List[str]]) -> pd.DataFrame:
    """One-hot encode categorical columns against fixed levels."""

    numeric = df.drop(columns=list(levels)).astype(float)
    blocks = [numeric]
    for col, col_levels in levels.items():
        values = df[col].astype(str)
        dummies = pd.DataFrame(
            {clean_feature_name(f"{col}_{level}"): (values == level).astype(int)
             for level in col_levels},
            index=df.index
        )
        blocks.append(dummies)
    return pd.concat(blocks, axis=1)


def _scale(
    encoded: pd.DataFrame,
    means: Dict[str, float],
    stds: Dict[str, float]
) -> pd.DataFrame:
    out = encoded.astype(float)
    if not means:
        return out
    center = pd.Series(means)[out.columns]
    scale = pd.Series(stds)[out.columns].replace(0, 1.0)
    return (out - center) / scale


def _oversample(
    df: pd.DataFrame,
    y: pd.Series,
    over_ratio: Optional[float],
    rng: np.random.Generator
) -> Tuple[pd.DataFrame, pd.Series, int]:
    """Randomly duplicate minority rows up to ``over_ratio`` minority/majority."""

    df = df.reset_index(drop=True)
    y = y.reset_index(drop=True)

    counts = y.value_counts()
    if over_ratio is None or len(counts) < 2:
        return df, y, 0

    # Already at or above the target ratio: nothing to add
    if counts.min() / counts.max() >= over_ratio:
        return df, y, 0

    sampler = RandomOverSampler(
        sampling_strategy=over_ratio,
        random_state=draw_seed(rng)
    )
    positions = np.arange(len(df)).reshape(-1, 1)
    sampler.fit_resample(positions, y)
    idx = sampler.sample_indices_

    df = df.iloc[idx].reset_index(drop=True)
    y = y.iloc[idx].reset_index(drop=True)
    return df, y, len(idx) - len(positions)


def _check_columns(df: pd.DataFrame, required: List[str]) -> None:
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise DataError(f"Missing expected columns: {missing}")
