import numpy as np
import pytest

from stranded.config import PipelineConfig, STRANDED_SCHEMA
from stranded.data_loader import make_synthetic_stranded
from stranded.exceptions import DataError, SelectionError
from stranded.models import ModelSpec
from stranded.pipeline import default_model_specs, run_pipeline


TARGET = STRANDED_SCHEMA.target


def test_default_model_specs():
    specs = default_model_specs(["logistic_reg", "decision_tree", "boost_tree"])

    assert [s.name for s in specs] == ["logistic_reg", "decision_tree", "boost_tree"]
    assert specs[0].is_final()
    assert specs[1].tuned_parameters() == ["cost_complexity", "tree_depth"]
    assert len(specs[2].tuned_parameters()) == 4


def test_unknown_default_model():
    with pytest.raises(ValueError, match="svm"):
        default_model_specs(["svm"])


def test_logistic_end_to_end(pool):
    df = make_synthetic_stranded(n=1000, positive_rate=0.3, rng=np.random.default_rng(42))
    config = PipelineConfig(split_prop=0.75, n_folds=5, seed=42, models=["logistic_reg"])

    result = run_pipeline(df, config=config, pool=pool, verbose=False)

    assert len(result.split.training) == 750
    assert len(result.split.holdout) == 250
    assert len(result.folds) == 5
    assert result.recipe.over_ratio == pytest.approx(0.3)

    evaluation = result.evaluations["logistic_reg"]
    cm = evaluation.confusion
    assert cm.tp + cm.fp + cm.fn + cm.tn == 250
    assert 0.0 <= evaluation.roc_auc <= 1.0

    summary = result.tuning["logistic_reg"].collect_metrics()
    assert (summary["n"] == 5).all()
    assert result.best_model == "logistic_reg"


def test_pipeline_is_reproducible(stranded_df, pool):
    config = PipelineConfig(n_folds=3, models=["logistic_reg"], seed=7)

    a = run_pipeline(stranded_df, config=config, pool=pool, verbose=False)
    b = run_pipeline(stranded_df, config=config, pool=pool, verbose=False)

    assert a.split.train_index.equals(b.split.train_index)
    np.testing.assert_allclose(a.evaluations["logistic_reg"].probabilities,
                               b.evaluations["logistic_reg"].probabilities)


def test_compares_models_on_resampled_metric(stranded_df, pool):
    config = PipelineConfig(n_folds=3, grid_levels=2,
                            models=["logistic_reg", "decision_tree"])
    result = run_pipeline(stranded_df, config=config, pool=pool, verbose=False)

    comparison = result.comparison()
    assert comparison["model"].tolist() == ["logistic_reg", "decision_tree"]
    assert len(result.tuning["decision_tree"].grid) == 4

    best = comparison.sort_values("cv_roc_auc", ascending=False, kind="stable").iloc[0]["model"]
    assert result.best_model == best

    selected = result.selected["decision_tree"]
    assert set(selected) == {"cost_complexity", "tree_depth", "config"}
    assert result.fitted["decision_tree"].spec.is_final()


def test_pipeline_with_ensemble(stranded_df, pool):
    config = PipelineConfig(n_folds=3, grid_levels=2,
                            models=["logistic_reg", "decision_tree"])
    result = run_pipeline(stranded_df, config=config, pool=pool, ensemble=True,
                          verbose=False)

    assert result.ensemble is not None
    assert "stack" in result.evaluations
    assert result.evaluations["stack"].confusion.total == len(result.split.holdout)
    assert result.comparison()["model"].tolist()[-1] == "stack"
    assert result.best_model != "stack"


def test_holdout_untouched_by_search(stranded_df, pool):
    config = PipelineConfig(n_folds=3, models=["logistic_reg"])
    result = run_pipeline(stranded_df, config=config, pool=pool, verbose=False)

    holdout = set(result.split.holdout_index)
    for fold in result.folds:
        assert holdout.isdisjoint(fold.analysis.index)
        assert holdout.isdisjoint(fold.assessment.index)


def test_model_failing_on_every_fold_is_fatal(stranded_df, pool):
    config = PipelineConfig(n_folds=3)
    specs = [ModelSpec.create("decision_tree", tree_depth=-1)]

    with pytest.raises(SelectionError):
        run_pipeline(stranded_df, config=config, specs=specs, pool=pool, verbose=False)


def test_missing_columns_fail_fast(stranded_df, pool):
    with pytest.raises(DataError):
        run_pipeline(stranded_df.drop(columns=[TARGET]), pool=pool, verbose=False)


def test_empty_model_list_rejected(stranded_df, pool):
    with pytest.raises(ValueError, match="No model specifications"):
        run_pipeline(stranded_df, specs=[], pool=pool, verbose=False)


def test_duplicate_model_families_rejected(stranded_df, pool):
    specs = [ModelSpec.create("decision_tree", tree_depth=1),
             ModelSpec.create("decision_tree", tree_depth=10)]

    with pytest.raises(ValueError, match="decision_tree"):
        run_pipeline(stranded_df, config=PipelineConfig(n_folds=3), specs=specs,
                     pool=pool, verbose=False)
