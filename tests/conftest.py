# tests/conftest.py
import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from stranded.config import STRANDED_SCHEMA
from stranded.data_loader import make_synthetic_stranded
from stranded.partition import initial_split, vfold_cv
from stranded.preprocessing import FeatureRecipe, minority_ratio
from stranded.tuning import WorkerPool


TARGET = STRANDED_SCHEMA.target


@pytest.fixture
def stranded_df():
    """400 synthetic admissions, 30% Stranded."""
    return make_synthetic_stranded(n=400, positive_rate=0.3, rng=np.random.default_rng(0))


@pytest.fixture
def split(stranded_df):
    return initial_split(stranded_df, prop=0.75, rng=7, strata=TARGET)


@pytest.fixture
def folds(split):
    return vfold_cv(split.training, v=3, rng=11, strata=TARGET)


@pytest.fixture
def recipe(split):
    return FeatureRecipe(over_ratio=minority_ratio(split.training[TARGET]))


@pytest.fixture
def pool():
    # Single worker runs units in-process
    with WorkerPool(n_workers=1) as p:
        yield p
