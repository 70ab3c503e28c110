import numpy as np
import pandas as pd
import pytest

from stranded.config import STRANDED_SCHEMA
from stranded.models import ModelSpec, tune
from stranded.partition import Fold, vfold_cv
from stranded.tuning import (
    WorkerPool,
    fit_resamples,
    grid_max_entropy,
    grid_regular,
    select_best,
    tune_grid,
)


TARGET = STRANDED_SCHEMA.target


# =============================================================================
# Grids
# =============================================================================

def test_regular_grid_is_cartesian_product():
    spec = ModelSpec.create("decision_tree", cost_complexity=tune(), tree_depth=tune())
    grid = grid_regular(spec.parameter_space(), levels=3)

    assert len(grid) == 9
    assert list(grid.columns) == ["config", "cost_complexity", "tree_depth"]
    assert grid["config"].tolist() == [f"Config{i}" for i in range(1, 10)]
    assert sorted(grid["tree_depth"].unique()) == [1, 8, 15]


def test_regular_grid_levels_per_parameter():
    spec = ModelSpec.create("decision_tree", cost_complexity=tune(), tree_depth=tune())
    grid = grid_regular(spec.parameter_space(), levels={"cost_complexity": 2, "tree_depth": 4})
    assert len(grid) == 8


def test_empty_space_gives_single_config():
    grid = grid_regular([])
    assert grid["config"].tolist() == ["Config1"]
    assert list(grid.columns) == ["config"]


def test_max_entropy_grid_size_and_ranges():
    spec = ModelSpec.create("boost_tree", min_n=tune(), tree_depth=tune(),
                            learn_rate=tune(), loss_reduction=tune())
    grid = grid_max_entropy(spec.parameter_space(), size=12, rng=3)

    assert len(grid) == 12
    assert not grid.drop(columns="config").duplicated().any()
    assert grid["min_n"].between(2, 40).all()
    assert grid["tree_depth"].between(1, 15).all()
    assert grid["learn_rate"].between(1e-10 * 0.999, 1e-1 * 1.001).all()
    assert grid["loss_reduction"].between(1e-10 * 0.999, 10 ** 1.5 * 1.001).all()


def test_max_entropy_grid_is_reproducible():
    spec = ModelSpec.create("boost_tree", min_n=tune(), tree_depth=tune(),
                            learn_rate=tune(), loss_reduction=tune())
    a = grid_max_entropy(spec.parameter_space(), size=8, rng=3)
    b = grid_max_entropy(spec.parameter_space(), size=8, rng=3)
    pd.testing.assert_frame_equal(a, b)


# =============================================================================
# Worker pool
# =============================================================================

def test_pool_must_be_started():
    pool = WorkerPool(n_workers=1)
    assert not pool.running
    with pytest.raises(RuntimeError):
        pool.map(abs, [-1])


def test_pool_lifecycle():
    pool = WorkerPool(n_workers=2).start()
    try:
        assert pool.running
        assert pool.map(abs, [-1, -2, 3]) == [1, 2, 3]
    finally:
        pool.shutdown()
    assert not pool.running


def test_pool_rejects_zero_workers():
    with pytest.raises(ValueError):
        WorkerPool(n_workers=0)


# =============================================================================
# Search
# =============================================================================

def test_three_by_three_grid_over_five_folds(split, recipe, pool):
    folds = vfold_cv(split.training, v=5, rng=2, strata=TARGET)
    spec = ModelSpec.create("decision_tree", cost_complexity=tune(), tree_depth=tune())

    result = tune_grid(spec, folds, recipe, grid=grid_regular(spec.parameter_space(), 3),
                       pool=pool, rng=1, verbose=False)
    summary = result.collect_metrics()
    auc = summary[summary["metric"] == "roc_auc"]

    assert len(auc) == 9
    assert (auc["n"] == 5).all()
    assert (auc["n_failed"] == 0).all()
    assert not auc["partial"].any()
    assert auc["mean"].between(0, 1).all()
    assert auc["config"].tolist() == [f"Config{i}" for i in range(1, 10)]


def test_mean_is_unweighted_fold_average(folds, recipe, pool):
    spec = ModelSpec.create("logistic_reg")
    result = fit_resamples(spec, folds, recipe, pool=pool, rng=1, verbose=False)

    fold_rows = result.collect_metrics(summarize=False)
    auc_folds = fold_rows[fold_rows["metric"] == "roc_auc"]["estimate"]
    summary = result.collect_metrics()
    auc = summary[summary["metric"] == "roc_auc"].iloc[0]

    assert len(auc_folds) == len(folds)
    assert auc["mean"] == pytest.approx(auc_folds.mean())
    assert auc["std_err"] == pytest.approx(auc_folds.std(ddof=1) / np.sqrt(len(folds)))


def test_failed_fold_is_recorded_not_raised(split, folds, recipe, pool):
    training = split.training
    single_class = training[training[TARGET] == "Not Stranded"]
    broken = Fold(fold_id="FoldX", analysis=single_class, assessment=folds[0].assessment)

    spec = ModelSpec.create("logistic_reg")
    result = fit_resamples(spec, [*folds, broken], recipe, pool=pool, rng=1, verbose=False)

    summary = result.collect_metrics()
    assert (summary["n"] == len(folds)).all()
    assert (summary["n_failed"] == 1).all()
    assert summary["partial"].all()

    failures = result.failures()
    assert set(failures["fold"]) == {"FoldX"}
    assert failures["error"].str.contains("Config1 failed on FoldX").all()

    # One failure out of four folds is still eligible
    assert select_best(result)["config"] == "Config1"


def test_config_failing_everywhere_is_skipped(folds, recipe, pool):
    spec = ModelSpec.create("decision_tree", tree_depth=tune())
    grid = pd.DataFrame({"tree_depth": [3, -1]})

    result = tune_grid(spec, folds, recipe, grid=grid, pool=pool, rng=1, verbose=False)
    summary = result.collect_metrics()
    broken = summary[summary["config"] == "Config2"]

    assert (broken["n"] == 0).all()
    assert broken["mean"].isna().all()
    assert select_best(result) == {"tree_depth": 3, "config": "Config1"}


def test_parallel_search_matches_sequential(folds, recipe, pool):
    spec = ModelSpec.create("decision_tree", tree_depth=tune())
    grid = pd.DataFrame({"tree_depth": [2, 5]})

    sequential = tune_grid(spec, folds, recipe, grid=grid, pool=pool, rng=9, verbose=False)
    with WorkerPool(n_workers=2) as two_workers:
        parallel = tune_grid(spec, folds, recipe, grid=grid, pool=two_workers,
                             rng=9, verbose=False)

    pd.testing.assert_frame_equal(sequential.collect_metrics(), parallel.collect_metrics())


def test_saved_predictions_cover_training_once(split, folds, recipe, pool):
    result = fit_resamples(ModelSpec.create("logistic_reg"), folds, recipe,
                           pool=pool, rng=1, save_pred=True, verbose=False)
    preds = result.collect_predictions()

    assert sorted(preds["row"]) == sorted(split.training.index)
    assert preds["prob"].between(0, 1).all()
    assert set(preds["truth"]) == {0, 1}


def test_predictions_require_save_pred(folds, recipe, pool):
    result = fit_resamples(ModelSpec.create("logistic_reg"), folds, recipe,
                           pool=pool, rng=1, verbose=False)
    with pytest.raises(ValueError):
        result.collect_predictions()


def test_fit_resamples_rejects_tunable_spec(folds, recipe, pool):
    spec = ModelSpec.create("decision_tree", tree_depth=tune())
    with pytest.raises(ValueError, match="tune_grid"):
        fit_resamples(spec, folds, recipe, pool=pool)


def test_unknown_metric_rejected(folds, recipe, pool):
    with pytest.raises(ValueError, match="Unknown metrics"):
        fit_resamples(ModelSpec.create("logistic_reg"), folds, recipe,
                      metrics=("brier",), pool=pool)


def test_stopped_pool_rejected(folds, recipe):
    with pytest.raises(RuntimeError):
        fit_resamples(ModelSpec.create("logistic_reg"), folds, recipe,
                      pool=WorkerPool(n_workers=1), verbose=False)


def test_grid_columns_must_be_tuned_parameters(folds, recipe, pool):
    spec = ModelSpec.create("decision_tree", tree_depth=tune())
    grid = pd.DataFrame({"tree_depth": [4, 4], "min_n": [2, 200]})

    with pytest.raises(ValueError, match="min_n"):
        tune_grid(spec, folds, recipe, grid=grid, pool=pool, rng=1, verbose=False)
