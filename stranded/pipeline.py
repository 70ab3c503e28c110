"""
Model Selection Pipeline
========================

Dataset -> Split -> FeatureRecipe -> Folds -> Search -> Selection ->
Final fit -> Holdout evaluation.

Holdout rows are set aside by the first split and are only touched by the
final evaluation: recipe statistics, resampling and hyperparameter
selection all use Training rows only.

Models are compared on their resampled (cross-validation) estimate of the
target metric. Holdout results are reported for every finalized model but
are never used to choose between them.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np
import pandas as pd

from .config import DatasetSchema, PipelineConfig, STRANDED_SCHEMA, make_rng
from .data_loader import prepare_dataset
from .ensemble import StackedEnsemble, blend_predictions, fit_members, stack_candidates
from .evaluation import EvaluationResult, evaluate_model
from .models import FittedModel, ModelSpec, fit_model, tune
from .partition import Fold, Split, initial_split, vfold_cv
from .preprocessing import FeatureRecipe, minority_ratio
from .tuning import (
    TuningResult,
    WorkerPool,
    fit_resamples,
    finalize_spec,
    grid_max_entropy,
    grid_regular,
    select_best,
    tune_grid,
)


def default_model_specs(names: Sequence[str]) -> List[ModelSpec]:
    """
    Model specifications compared by default.

    - logistic_reg: no tuning
    - rand_forest: fixed 100 trees, no tuning
    - decision_tree: cost_complexity x tree_depth (regular grid)
    - boost_tree: min_n, tree_depth, learn_rate, loss_reduction (max-entropy grid)
    """

    factories = {
        'logistic_reg': lambda: ModelSpec.create('logistic_reg'),
        'rand_forest': lambda: ModelSpec.create('rand_forest', trees=100),
        'decision_tree': lambda: ModelSpec.create(
            'decision_tree', cost_complexity=tune(), tree_depth=tune()
        ),
        'boost_tree': lambda: ModelSpec.create(
            'boost_tree', trees=200, min_n=tune(), tree_depth=tune(),
            learn_rate=tune(), loss_reduction=tune()
        ),
    }

    unknown = [n for n in names if n not in factories]
    if unknown:
        raise ValueError(f"Unknown models {unknown}. Available: {sorted(factories)}")
    return [factories[n]() for n in names]


@dataclass
class PipelineResult:
    """Everything produced by one pipeline run."""
    config: PipelineConfig
    split: Split = field(repr=False)
    folds: List[Fold] = field(repr=False)
    recipe: FeatureRecipe = field(repr=False)
    tuning: Dict[str, TuningResult] = field(default_factory=dict, repr=False)
    selected: Dict[str, Dict] = field(default_factory=dict)
    fitted: Dict[str, FittedModel] = field(default_factory=dict, repr=False)
    evaluations: Dict[str, EvaluationResult] = field(default_factory=dict, repr=False)
    ensemble: Optional[StackedEnsemble] = field(default=None, repr=False)
    best_model: Optional[str] = None

    def comparison(self) -> pd.DataFrame:
        """
        One row per model: resampled estimate of the target metric for the
        selected configuration, then Holdout metrics.
        """

        metric = self.config.target_metric
        rows = []
        for name, result in self.tuning.items():
            summary = result.collect_metrics()
            chosen = summary[(summary['config'] == self.selected[name]['config'])
                             & (summary['metric'] == metric)].iloc[0]
            evaluation = self.evaluations[name]
            rows.append({
                'model': name,
                'config': chosen['config'],
                f'cv_{metric}': chosen['mean'],
                'cv_std_err': chosen['std_err'],
                'cv_partial': chosen['partial'],
                'holdout_roc_auc': evaluation.roc_auc,
                'holdout_accuracy': evaluation.confusion.accuracy,
            })
        if self.ensemble is not None and 'stack' in self.evaluations:
            evaluation = self.evaluations['stack']
            rows.append({
                'model': 'stack',
                'config': None,
                f'cv_{metric}': np.nan,
                'cv_std_err': np.nan,
                'cv_partial': False,
                'holdout_roc_auc': evaluation.roc_auc,
                'holdout_accuracy': evaluation.confusion.accuracy,
            })
        return pd.DataFrame(rows)


def run_pipeline(
    data: pd.DataFrame,
    config: Optional[PipelineConfig] = None,
    schema: DatasetSchema = STRANDED_SCHEMA,
    specs: Optional[Sequence[ModelSpec]] = None,
    pool: Optional[WorkerPool] = None,
    ensemble: bool = False,
    verbose: bool = True
) -> PipelineResult:
    """
    Run the full model selection pipeline.

    Parameters
    ----------
    data : pd.DataFrame
        Raw dataset (validated against ``schema``).
    config : PipelineConfig, optional
        Split/resampling/tuning settings. Defaults to PipelineConfig().
    schema : DatasetSchema
        Target and predictor columns.
    specs : list of ModelSpec, optional
        Models to compare. Defaults to ``default_model_specs(config.models)``.
    pool : WorkerPool, optional
        Running worker pool. If None, one is created with
        ``config.n_workers`` workers and shut down at the end.
    ensemble : bool, default=False
        Also stack every candidate configuration into an ensemble.
    verbose : bool, default=True
        Print progress.

    Returns
    -------
    PipelineResult
    """

    config = (config or PipelineConfig()).validate()
    specs = list(specs) if specs is not None else default_model_specs(config.models)
    if not specs:
        raise ValueError("No model specifications to compare")
    # Results are keyed by model family
    names = [s.name for s in specs]
    dups = sorted({n for n in names if names.count(n) > 1})
    if dups:
        raise ValueError(
            f"Duplicate model names {dups}; compare one specification per model family"
        )
    rng = make_rng(config.seed)
    strata = schema.target if config.stratify else None

    # Step 1: Validate data
    df = prepare_dataset(data, schema=schema, verbose=verbose)

    # Step 2: Training / Holdout
    split = initial_split(df, prop=config.split_prop, rng=rng, strata=strata)
    if verbose:
        print(f"Training set: {len(split.training):,} rows")
        print(f"Holdout set: {len(split.holdout):,} rows")

    # Step 3: Recipe with the rebalancing ratio captured once from Training
    over_ratio = config.over_ratio
    if over_ratio is None:
        over_ratio = minority_ratio(split.training[schema.target])
    recipe = FeatureRecipe(schema=schema, over_ratio=over_ratio)
    if verbose:
        print(f"Oversampling ratio (minority/total on Training): {over_ratio:.3f}")

    # Step 4: Resamples
    folds = vfold_cv(split.training, v=config.n_folds, rng=rng, strata=strata)

    result = PipelineResult(config=config, split=split, folds=folds, recipe=recipe)

    own_pool = pool is None
    if own_pool:
        pool = WorkerPool(n_workers=config.n_workers).start()

    try:
        # Step 5: Search
        for spec in specs:
            if spec.is_final():
                tuned = fit_resamples(spec, folds, recipe, pool=pool, rng=rng,
                                      save_pred=ensemble, verbose=verbose)
            else:
                tuned = tune_grid(spec, folds, recipe, grid=_grid_for(spec, config, rng),
                                  pool=pool, rng=rng, save_pred=ensemble, verbose=verbose)
            result.tuning[spec.name] = tuned
    finally:
        if own_pool:
            pool.shutdown()

    # Step 6: Select, finalize, fit on all Training rows, evaluate on Holdout
    for spec in specs:
        tuned = result.tuning[spec.name]
        best = select_best(tuned, metric=config.target_metric,
                           max_failed_fraction=config.max_failed_fraction)
        result.selected[spec.name] = best

        final_spec = finalize_spec(spec, best) if not spec.is_final() else spec
        fitted = fit_model(final_spec, split.training, recipe, rng=rng)
        result.fitted[spec.name] = fitted
        result.evaluations[spec.name] = evaluate_model(fitted, split.holdout,
                                                       verbose=verbose)

    # Step 7 (optional): Stacked ensemble
    if ensemble:
        stack = stack_candidates(list(result.tuning.values()), verbose=verbose)
        blend = blend_predictions(stack, verbose=verbose)
        result.ensemble = fit_members(blend, split.training, recipe, rng=rng)
        result.evaluations['stack'] = evaluate_model(result.ensemble, split.holdout,
                                                     verbose=verbose)

    comparison = result.comparison()
    best_row = comparison[comparison['model'] != 'stack'] \
        .sort_values(f'cv_{config.target_metric}', ascending=False, kind='stable') \
        .iloc[0]
    result.best_model = best_row['model']

    if verbose:
        print("\n" + "="*60)
        print("MODEL COMPARISON")
        print("="*60)
        print(comparison.to_string(index=False))
        print(f"\nBest model (resampled {config.target_metric}): {result.best_model}")
        print("="*60 + "\n")

    return result


def _grid_for(spec: ModelSpec, config: PipelineConfig, rng: np.random.Generator) -> pd.DataFrame:
    """Regular grid for up to two tuned parameters, max-entropy beyond that."""
    space = spec.parameter_space()
    if len(space) <= 2:
        return grid_regular(space, levels=config.grid_levels)
    return grid_max_entropy(space, size=config.grid_size, rng=rng)
