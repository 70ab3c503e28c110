import math

import numpy as np
import pandas as pd
import pytest

from stranded.config import STRANDED_SCHEMA
from stranded.data_loader import make_synthetic_stranded
from stranded.exceptions import DataError
from stranded.partition import initial_split, vfold_cv


TARGET = STRANDED_SCHEMA.target


@pytest.mark.parametrize("prop", [0.5, 0.75, 0.8])
def test_split_sizes_and_disjointness(stranded_df, prop):
    split = initial_split(stranded_df, prop=prop, rng=3, strata=TARGET)

    assert len(split.training) == math.floor(prop * len(stranded_df))
    assert len(split.training) + len(split.holdout) == len(stranded_df)
    assert split.train_index.intersection(split.holdout_index).empty
    assert split.train_index.union(split.holdout_index).sort_values().equals(
        stranded_df.index.sort_values()
    )


def test_split_is_reproducible(stranded_df):
    a = initial_split(stranded_df, rng=42)
    b = initial_split(stranded_df, rng=42)
    c = initial_split(stranded_df, rng=43)

    assert a.train_index.equals(b.train_index)
    assert not a.train_index.equals(c.train_index)


def test_stratified_split_keeps_class_rate(stranded_df):
    split = initial_split(stranded_df, prop=0.75, rng=1, strata=TARGET)
    overall = (stranded_df[TARGET] == "Stranded").mean()
    train_rate = (split.training[TARGET] == "Stranded").mean()
    assert abs(train_rate - overall) < 0.02


@pytest.mark.parametrize("prop", [0, 1, 1.2])
def test_invalid_proportion_raises(stranded_df, prop):
    with pytest.raises(DataError):
        initial_split(stranded_df, prop=prop)


def test_empty_data_raises():
    with pytest.raises(DataError):
        initial_split(pd.DataFrame({TARGET: []}))


def test_folds_cover_training_exactly_once(split):
    folds = vfold_cv(split.training, v=5, rng=2, strata=TARGET)

    assert [f.fold_id for f in folds] == ["Fold1", "Fold2", "Fold3", "Fold4", "Fold5"]

    assessed = np.concatenate([f.assessment.index.to_numpy() for f in folds])
    assert len(assessed) == len(split.training)
    assert set(assessed) == set(split.training.index)

    for fold in folds:
        assert fold.analysis.index.intersection(fold.assessment.index).empty
        assert len(fold.analysis) + len(fold.assessment) == len(split.training)


def test_unstratified_fold_sizes_differ_by_at_most_one():
    df = make_synthetic_stranded(n=103, rng=np.random.default_rng(4))
    folds = vfold_cv(df, v=5, rng=1)
    sizes = [len(f.assessment) for f in folds]
    assert max(sizes) - min(sizes) <= 1


def test_folds_keep_original_index(split):
    folds = vfold_cv(split.training, v=3, rng=2)
    for fold in folds:
        assert fold.assessment.index.isin(split.training.index).all()


@pytest.mark.parametrize("v", [1, 10_000])
def test_invalid_fold_count_raises(split, v):
    with pytest.raises(DataError):
        vfold_cv(split.training, v=v)
