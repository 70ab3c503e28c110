import numpy as np
import pandas as pd
import pytest

from stranded.config import STRANDED_SCHEMA
from stranded.exceptions import DataError, FitError
from stranded.preprocessing import (
    FeatureRecipe,
    clean_feature_name,
    decompose_dates,
    encode_target,
    minority_ratio,
)


TARGET = STRANDED_SCHEMA.target


def test_minority_ratio(stranded_df):
    assert minority_ratio(stranded_df[TARGET]) == pytest.approx(0.3)


def test_minority_ratio_needs_two_classes():
    with pytest.raises(DataError):
        minority_ratio(pd.Series(["Stranded"] * 5))


def test_encode_target():
    y = pd.Series(["Stranded", "Not Stranded", "Stranded"])
    assert encode_target(y).tolist() == [1, 0, 1]


def test_clean_feature_name():
    assert clean_feature_name("frailty_index_Fall patient history") == \
        "frailty_index_Fall_patient_history"
    assert clean_feature_name("age[<65]") == "age_65"


def test_decompose_dates_replaces_date_column(stranded_df):
    out = decompose_dates(stranded_df, STRANDED_SCHEMA)

    assert "admit_date" not in out.columns
    assert set(out["admit_date_dow"]) <= {"Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"}
    assert out["admit_date_month"].nunique() == 12


def test_decompose_dates_rejects_bad_dates(stranded_df):
    df = stranded_df.copy()
    df["admit_date"] = df["admit_date"].astype(object)
    df.loc[0, "admit_date"] = "not a date"
    with pytest.raises(DataError, match="admit_date"):
        decompose_dates(df, STRANDED_SCHEMA)


def test_apply_preserves_rows_and_index(split, recipe):
    prepared = recipe.fit(split.training, rng=1)
    baked = prepared.apply(split.holdout)

    assert len(baked) == len(split.holdout)
    assert baked.index.equals(split.holdout.index)


def test_apply_output_columns_are_stable(split, recipe):
    prepared = recipe.fit(split.training, rng=1)

    full = prepared.apply(split.holdout)
    single = prepared.apply(split.holdout.iloc[[0]])

    assert list(full.columns) == prepared.feature_columns
    assert list(single.columns) == prepared.feature_columns


def test_apply_is_deterministic(split, recipe):
    prepared = recipe.fit(split.training, rng=1)
    pd.testing.assert_frame_equal(prepared.apply(split.holdout), prepared.apply(split.holdout))


def test_apply_works_without_target(split, recipe):
    prepared = recipe.fit(split.training, rng=1)
    baked = prepared.apply(split.holdout.drop(columns=[TARGET]))
    assert list(baked.columns) == prepared.feature_columns


def test_one_hot_keeps_all_levels(split):
    prepared = FeatureRecipe().fit(split.training)
    frailty = [c for c in prepared.feature_columns if c.startswith("frailty_index_")]
    assert len(frailty) == split.training["frailty_index"].nunique()


def test_normalized_training_data(split):
    prepared = FeatureRecipe().fit(split.training)
    X, _ = prepared.juice()

    np.testing.assert_allclose(X.mean().to_numpy(), 0.0, atol=1e-9)
    np.testing.assert_allclose(X.std().to_numpy(), 1.0, atol=1e-9)


def test_statistics_come_from_training_only(split):
    prepared = FeatureRecipe().fit(split.training)
    assert prepared.means["age"] == pytest.approx(split.training["age"].mean())

    shifted = split.holdout.copy()
    shifted["age"] = shifted["age"] + 100
    baked = prepared.apply(shifted)

    assert prepared.means["age"] == pytest.approx(split.training["age"].mean())
    expected = (shifted["age"] - prepared.means["age"]) / prepared.stds["age"]
    np.testing.assert_allclose(baked["age"].to_numpy(), expected.to_numpy())


def test_no_oversampling_when_ratio_already_met(split, recipe):
    # minority/total is always below minority/majority
    prepared = recipe.fit(split.training, rng=1)
    assert prepared.n_oversampled == 0
    assert len(prepared.training_target) == len(split.training)


def test_oversampling_reaches_target_ratio(split):
    training_counts = split.training[TARGET].value_counts()
    prepared = FeatureRecipe(over_ratio=0.8).fit(split.training, rng=1)
    y = prepared.training_target

    n_pos, n_neg = int((y == 1).sum()), int((y == 0).sum())

    assert n_neg == training_counts["Not Stranded"]
    assert n_pos > training_counts["Stranded"]
    assert n_pos / n_neg == pytest.approx(0.8, abs=1 / n_neg)
    assert prepared.n_oversampled == n_pos - training_counts["Stranded"]
    assert len(prepared.training_data) == len(y)


def test_oversampling_is_seeded(split):
    recipe = FeatureRecipe(over_ratio=0.9)
    a = recipe.fit(split.training, rng=5).juice()[0]
    b = recipe.fit(split.training, rng=5).juice()[0]
    pd.testing.assert_frame_equal(a, b)


def test_oversampling_never_touches_applied_data(split):
    prepared = FeatureRecipe(over_ratio=1.0).fit(split.training, rng=1)
    assert len(prepared.apply(split.holdout)) == len(split.holdout)


def test_unseen_levels_are_zero_encoded(split):
    prepared = FeatureRecipe(normalize=False).fit(split.training)
    new = split.holdout.iloc[:3].copy()
    new["frailty_index"] = "Unknown frailty"

    baked = prepared.apply(new)
    frailty = [c for c in baked.columns if c.startswith("frailty_index_")]

    assert frailty
    assert (baked[frailty] == 0).all().all()


def test_unseen_levels_can_raise(split):
    prepared = FeatureRecipe(unseen_levels="error").fit(split.training)
    new = split.holdout.iloc[:3].copy()
    new["frailty_index"] = "Unknown frailty"

    with pytest.raises(DataError, match="frailty_index"):
        prepared.apply(new)


def test_zero_variance_predictors_are_removed(split):
    training = split.training.copy()
    training["hcop"] = 0
    prepared = FeatureRecipe().fit(training)

    assert "hcop" in prepared.zero_variance
    assert "hcop" not in prepared.feature_columns
    assert "hcop" not in prepared.apply(split.holdout).columns


def test_missing_predictor_raises(split, recipe):
    prepared = recipe.fit(split.training, rng=1)
    with pytest.raises(DataError, match="age"):
        prepared.apply(split.holdout.drop(columns=["age"]))


def test_all_constant_predictors_fail():
    df = pd.DataFrame({
        TARGET: ["Stranded", "Not Stranded"] * 3,
        "age": 70,
        "care.home.referral": 0,
        "medicallysafe": 0,
        "hcop": 0,
        "mental_health_care": 0,
        "periods_of_previous_care": 1,
        "admit_date": pd.Timestamp("2020-03-02"),
        "frailty_index": "Dementia",
    })
    with pytest.raises(FitError):
        FeatureRecipe().fit(df)


@pytest.mark.parametrize("kwargs", [{"unseen_levels": "ignore"}, {"over_ratio": 0}])
def test_invalid_recipe_options(kwargs):
    with pytest.raises(DataError):
        FeatureRecipe(**kwargs)
