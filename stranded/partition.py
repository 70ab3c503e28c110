"""
Data Partitioning Module
========================

Two levels of partitioning keep the final performance estimate honest:

1. initial_split: Training vs Holdout. Holdout is locked away until the
   selected model is evaluated once.
2. vfold_cv: k folds of Training. Each fold holds out one assessment set
   and trains on the remaining k-1 portions, so tuning decisions are made
   from out-of-sample estimates without touching Holdout.

Stratification by the target keeps the Stranded rate similar in every
partition, which matters for imbalanced clinical outcomes.
"""

from dataclasses import dataclass
from typing import List, Optional, Union

import numpy as np
import pandas as pd
from sklearn.model_selection import train_test_split, KFold, StratifiedKFold

from .config import make_rng, draw_seed
from .exceptions import DataError


@dataclass(frozen=True)
class Split:
    """Disjoint Training/Holdout partition of a dataset (original index kept)."""
    training: pd.DataFrame
    holdout: pd.DataFrame

    @property
    def train_index(self) -> pd.Index:
        return self.training.index

    @property
    def holdout_index(self) -> pd.Index:
        return self.holdout.index

    def __repr__(self) -> str:
        return f"<Split training/holdout: {len(self.training)}/{len(self.holdout)}>"


@dataclass(frozen=True)
class Fold:
    """One resample: fit on ``analysis``, score on ``assessment``."""
    fold_id: str
    analysis: pd.DataFrame
    assessment: pd.DataFrame

    def __repr__(self) -> str:
        return f"<Fold {self.fold_id}: {len(self.analysis)}/{len(self.assessment)}>"


def initial_split(
    df: pd.DataFrame,
    prop: float = 0.75,
    rng: Union[int, np.random.Generator, None] = 42,
    strata: Optional[str] = None
) -> Split:
    """
    Split a dataset into Training and Holdout.

    Parameters
    ----------
    df : pd.DataFrame
        Full dataset.
    prop : float, default=0.75
        Proportion of rows assigned to Training; must be in (0, 1).
    rng : int or np.random.Generator
        Seed or generator driving the permutation. The same seed always
        yields the same split.
    strata : str, optional
        Column to stratify by (usually the target).

    Returns
    -------
    Split
        ``len(training) == floor(prop * len(df))``; the remainder is Holdout.
    """

    if not 0 < prop < 1:
        raise DataError(f"Split proportion must be in (0, 1), got {prop}")
    if len(df) == 0:
        raise DataError("Cannot split an empty dataset")

    n_train = int(np.floor(prop * len(df)))
    if n_train == 0 or n_train == len(df):
        raise DataError(
            f"Split proportion {prop} leaves an empty partition for {len(df)} rows"
        )

    random_state = draw_seed(make_rng(rng))
    stratify = df[strata] if strata is not None else None

    try:
        train_idx, holdout_idx = train_test_split(
            df.index.to_numpy(),
            train_size=n_train,
            random_state=random_state,
            shuffle=True,
            stratify=stratify
        )
    except ValueError as e:
        raise DataError(f"Could not split data: {e}") from e

    return Split(training=df.loc[train_idx], holdout=df.loc[holdout_idx])


def vfold_cv(
    training: pd.DataFrame,
    v: int = 5,
    rng: Union[int, np.random.Generator, None] = 42,
    strata: Optional[str] = None
) -> List[Fold]:
    """
    V-fold cross-validation resamples of the Training data.

    Every row appears in exactly one assessment set; assessment set sizes
    differ by at most one row (per stratum when stratified).
    """

    if v < 2:
        raise DataError(f"Number of folds must be >= 2, got {v}")
    if v > len(training):
        raise DataError(
            f"Number of folds ({v}) exceeds number of training rows ({len(training)})"
        )

    random_state = draw_seed(make_rng(rng))

    if strata is not None:
        splitter = StratifiedKFold(n_splits=v, shuffle=True, random_state=random_state)
        split_iter = splitter.split(training, training[strata])
    else:
        splitter = KFold(n_splits=v, shuffle=True, random_state=random_state)
        split_iter = splitter.split(training)

    folds = []
    try:
        for i, (analysis_pos, assessment_pos) in enumerate(split_iter, start=1):
            folds.append(Fold(
                fold_id=f"Fold{i}",
                analysis=training.iloc[analysis_pos],
                assessment=training.iloc[assessment_pos]
            ))
    except ValueError as e:
        raise DataError(f"Could not create {v} folds: {e}") from e

    return folds
