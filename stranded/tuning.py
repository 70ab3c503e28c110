"""
Hyperparameter Search Module
============================

Each candidate configuration is fit once per cross-validation fold and
scored on that fold's assessment rows. Work units (fold x configuration)
are independent, so they run on a worker pool; aggregation waits until
every unit has returned.

Grid strategies:
- grid_regular: full Cartesian product of evenly spaced levels. Grows
  exponentially with the number of tuned parameters.
- grid_max_entropy: fixed-size space-filling design, used when a model has
  many tunable parameters (e.g. XGBoost's four).

Failure policy:
A fit that fails on one fold is recorded against that (fold, config) pair
and excluded from the configuration's averages; the aggregate is flagged
'partial'. The search itself never aborts because of a single fit.
"""

import itertools
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from sklearn.metrics import accuracy_score, roc_auc_score

from .config import default_worker_count, make_rng, draw_seed
from .exceptions import SearchError, SelectionError
from .models import ModelSpec, Parameter, fit_model
from .partition import Fold
from .preprocessing import FeatureRecipe, encode_target


METRICS: Dict[str, Callable[[np.ndarray, np.ndarray], float]] = {
    'roc_auc': lambda truth, proba: roc_auc_score(truth, proba),
    'accuracy': lambda truth, proba: accuracy_score(truth, (proba >= 0.5).astype(int)),
}


# =============================================================================
# Grids
# =============================================================================

def _as_grid(rows: List[Dict[str, Any]], names: Sequence[str]) -> pd.DataFrame:
    grid = pd.DataFrame(rows, columns=list(names), index=range(len(rows)))
    grid.insert(0, 'config', [f"Config{i}" for i in range(1, len(rows) + 1)])
    return grid


def grid_regular(
    space: Sequence[Parameter],
    levels: Union[int, Mapping[str, int]] = 3
) -> pd.DataFrame:
    """
    Regular grid: Cartesian product of evenly spaced values per parameter.

    Parameters
    ----------
    space : list of Parameter
        Tuned parameters.
    levels : int or dict
        Number of values per parameter (a dict sets it per parameter name).

    Returns
    -------
    pd.DataFrame
        One row per assignment with a leading 'config' column.
    """

    if not space:
        return _as_grid([{}], [])

    per_param = []
    for param in space:
        n = levels[param.name] if isinstance(levels, Mapping) else levels
        per_param.append(param.regular_values(n))

    names = [p.name for p in space]
    rows = [dict(zip(names, combo)) for combo in itertools.product(*per_param)]
    return _as_grid(rows, names)


def grid_max_entropy(
    space: Sequence[Parameter],
    size: int = 20,
    rng: Union[int, np.random.Generator, None] = None,
    pool_factor: int = 50
) -> pd.DataFrame:
    """
    Space-filling grid of ``size`` assignments.

    A Latin hypercube pool of candidate points is drawn in the unit cube;
    points are then picked greedily, each maximising its minimum distance
    to the points already chosen. Duplicate assignments (possible after
    integer rounding) are skipped, so fewer than ``size`` rows are
    returned only when the space has fewer distinct assignments.
    """

    if not space:
        return _as_grid([{}], [])
    if size < 1:
        raise ValueError(f"size must be positive, got {size}")

    rng = make_rng(rng)
    n_dims = len(space)
    n_pool = max(pool_factor * size, 500)
    candidates = _latin_hypercube(n_pool, n_dims, rng)

    names = [p.name for p in space]
    rows: List[Dict[str, Any]] = []
    seen = set()

    available = np.ones(n_pool, dtype=bool)
    min_dist = np.full(n_pool, np.inf)
    pick = int(rng.integers(n_pool))

    while len(rows) < size and available.any():
        available[pick] = False
        point = candidates[pick]
        row = {p.name: p.from_unit(u) for p, u in zip(space, point)}
        key = tuple(row[n] for n in names)
        if key not in seen:
            seen.add(key)
            rows.append(row)

        dist = np.sqrt(((candidates - point) ** 2).sum(axis=1))
        min_dist = np.minimum(min_dist, dist)
        if not available.any():
            break
        pick = int(np.argmax(np.where(available, min_dist, -np.inf)))

    return _as_grid(rows, names)


def _latin_hypercube(n: int, d: int, rng: np.random.Generator) -> np.ndarray:
    strata = np.column_stack([rng.permutation(n) for _ in range(d)])
    return (strata + rng.random((n, d))) / n


# =============================================================================
# Worker pool
# =============================================================================

class WorkerPool:
    """
    Explicit worker pool for search units.

    Create before the search and shut down after it, or use as a context
    manager. Defaults to all cores but one.

    Examples
    --------
    >>> with WorkerPool(n_workers=4) as pool:
    ...     result = tune_grid(spec, folds, recipe, grid, pool=pool)
    """

    def __init__(self, n_workers: Optional[int] = None, backend: str = "loky"):
        self.n_workers = n_workers if n_workers is not None else default_worker_count()
        if self.n_workers < 1:
            raise ValueError(f"n_workers must be >= 1, got {self.n_workers}")
        self.backend = backend
        self._parallel: Optional[Parallel] = None

    @property
    def running(self) -> bool:
        return self._parallel is not None

    def start(self) -> "WorkerPool":
        if self._parallel is None:
            self._parallel = Parallel(n_jobs=self.n_workers, backend=self.backend)
            self._parallel.__enter__()
        return self

    def shutdown(self) -> None:
        if self._parallel is not None:
            self._parallel.__exit__(None, None, None)
            self._parallel = None

    def map(self, func: Callable, items: Iterable) -> list:
        """Run ``func`` over ``items``; returns once every item is done."""
        if self._parallel is None:
            raise RuntimeError("WorkerPool is not running; call start() first")
        return self._parallel(delayed(func)(item) for item in items)

    def __enter__(self) -> "WorkerPool":
        return self.start()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        state = "running" if self.running else "stopped"
        return f"<WorkerPool workers={self.n_workers} backend={self.backend} {state}>"


# =============================================================================
# Search
# =============================================================================

@dataclass(frozen=True)
class _WorkUnit:
    spec: ModelSpec
    recipe: FeatureRecipe
    fold: Fold
    config: str
    params: Dict[str, Any]
    seed: int
    metrics: tuple
    save_pred: bool


def _run_unit(unit: _WorkUnit) -> Dict[str, Any]:
    """Fit and score one (fold, config) pair. Never raises."""

    records = []
    predictions = None
    try:
        fitted = fit_model(unit.spec, unit.fold.analysis, unit.recipe,
                           params=unit.params, rng=unit.seed)
        proba = fitted.predict_proba(unit.fold.assessment)
        truth = encode_target(unit.fold.assessment[unit.recipe.schema.target],
                              unit.recipe.schema).to_numpy()
    except Exception as e:
        error = str(SearchError(unit.fold.fold_id, unit.config, e))
        for name in unit.metrics:
            records.append({'config': unit.config, 'fold': unit.fold.fold_id,
                            'metric': name, 'estimate': np.nan, 'error': error})
        return {'records': records, 'predictions': None}

    for name in unit.metrics:
        try:
            estimate = float(METRICS[name](truth, proba))
            error = None
        except Exception as e:
            estimate = np.nan
            error = str(SearchError(unit.fold.fold_id, unit.config, e))
        records.append({'config': unit.config, 'fold': unit.fold.fold_id,
                        'metric': name, 'estimate': estimate, 'error': error})

    if unit.save_pred:
        predictions = pd.DataFrame({
            'config': unit.config,
            'fold': unit.fold.fold_id,
            'row': unit.fold.assessment.index,
            'truth': truth,
            'prob': proba,
        })

    return {'records': records, 'predictions': predictions}


@dataclass
class TuningResult:
    """
    Fold-level outcome of a search.

    Attributes
    ----------
    spec : ModelSpec
        The (unfinalized) model specification searched.
    grid : pd.DataFrame
        Assignments with a 'config' column, in evaluation order.
    metrics : pd.DataFrame
        One row per (config, fold, metric): 'estimate' (NaN on failure) and
        'error' (failure text, or None).
    n_folds : int
        Number of resamples every configuration was fit on.
    predictions : pd.DataFrame, optional
        Out-of-fold probabilities ('config', 'fold', 'row', 'truth', 'prob')
        when the search was run with ``save_pred=True``.
    rows : pd.Index, optional
        Training rows covered by the folds' assessment sets.
    """
    spec: ModelSpec
    grid: pd.DataFrame
    metrics: pd.DataFrame
    n_folds: int
    predictions: Optional[pd.DataFrame] = None
    rows: Optional[pd.Index] = None

    @property
    def param_names(self) -> List[str]:
        return [c for c in self.grid.columns if c != 'config']

    def collect_metrics(self, summarize: bool = True) -> pd.DataFrame:
        """
        Metrics per configuration.

        With ``summarize=True`` returns one row per (config, metric) with the
        unweighted mean over successful folds, its standard error, the
        number of successful (n) and failed (n_failed) folds and a
        'partial' flag. Otherwise returns the fold-level rows.
        """

        if not summarize:
            return self.grid.merge(self.metrics, on='config')

        def _summary(group: pd.DataFrame) -> pd.Series:
            ok = group['estimate'].dropna()
            n = len(ok)
            std_err = ok.std(ddof=1) / np.sqrt(n) if n > 1 else np.nan
            return pd.Series({
                'mean': ok.mean() if n else np.nan,
                'std_err': std_err,
                'n': n,
                'n_failed': self.n_folds - n,
            })

        summary = (
            self.metrics
            .groupby(['config', 'metric'], sort=False)[['estimate']]
            .apply(_summary)
            .reset_index()
        )
        summary['n'] = summary['n'].astype(int)
        summary['n_failed'] = summary['n_failed'].astype(int)
        summary['partial'] = summary['n_failed'] > 0

        # Inner merge keeps the grid's config order
        out = self.grid.merge(summary, on='config')
        return out[['config', *self.param_names, 'metric', 'mean', 'std_err',
                    'n', 'n_failed', 'partial']].reset_index(drop=True)

    def failures(self) -> pd.DataFrame:
        """(config, fold, metric, error) rows that did not produce a value."""
        return self.metrics[self.metrics['error'].notna()].reset_index(drop=True)

    def collect_predictions(self) -> pd.DataFrame:
        if self.predictions is None:
            raise ValueError("Search was run without save_pred=True")
        return self.predictions

    def __repr__(self) -> str:
        return (f"<TuningResult {self.spec.name}: {len(self.grid)} configs x "
                f"{self.n_folds} folds, {len(self.failures())} failed metric rows>")


def tune_grid(
    spec: ModelSpec,
    folds: Sequence[Fold],
    recipe: FeatureRecipe,
    grid: Union[pd.DataFrame, int, None] = None,
    metrics: Sequence[str] = ('roc_auc', 'accuracy'),
    pool: Optional[WorkerPool] = None,
    rng: Union[int, np.random.Generator, None] = None,
    save_pred: bool = False,
    verbose: bool = True
) -> TuningResult:
    """
    Fit ``spec`` once per (fold, assignment) and score each fit.

    Parameters
    ----------
    spec : ModelSpec
        Model with tune() markers for the searched parameters.
    folds : list of Fold
        Resamples of the Training data.
    recipe : FeatureRecipe
        Preprocessing; refit on each fold's analysis rows. Its over_ratio
        must already be captured from the full Training data.
    grid : DataFrame, int or None
        Explicit grid, a max-entropy grid size, or None for a 3-level
        regular grid.
    metrics : sequence of str
        Metric names from METRICS.
    pool : WorkerPool, optional
        Running pool to use. If None, a default pool is started and shut
        down around this search.
    rng : int or np.random.Generator, optional
        Source of per-unit seeds (drawn up front, in unit order).
    save_pred : bool, default=False
        Keep out-of-fold probabilities (needed for stacking).
    verbose : bool, default=True
        Print progress.

    Returns
    -------
    TuningResult
    """

    if not folds:
        raise ValueError("tune_grid needs at least one fold")
    unknown = [m for m in metrics if m not in METRICS]
    if unknown:
        raise ValueError(f"Unknown metrics {unknown}. Available: {sorted(METRICS)}")

    rng = make_rng(rng)
    space = spec.parameter_space()

    if grid is None:
        grid = grid_regular(space, levels=3)
    elif isinstance(grid, int):
        grid = grid_max_entropy(space, size=grid, rng=rng)
    elif 'config' not in grid.columns:
        grid = _as_grid(grid.to_dict('records'), list(grid.columns))

    missing = [p for p in spec.tuned_parameters() if p not in grid.columns]
    if missing:
        raise ValueError(f"Grid has no values for tuned parameters {missing}")

    param_names = [c for c in grid.columns if c != 'config']
    untuned = [p for p in param_names if p not in spec.tuned_parameters()]
    if untuned:
        raise ValueError(
            f"Grid columns {untuned} are not tuned parameters of {spec.name}; "
            f"mark them with tune() or set them on the ModelSpec"
        )

    units = []
    for row in grid.to_dict('records'):
        params = {k: row[k] for k in param_names}
        for fold in folds:
            units.append(_WorkUnit(
                spec=spec, recipe=recipe, fold=fold, config=row['config'],
                params=params, seed=draw_seed(rng), metrics=tuple(metrics),
                save_pred=save_pred
            ))

    if verbose:
        print("="*60)
        print(f"HYPERPARAMETER SEARCH: {spec.name}")
        print("="*60)
        print(f"   Configurations: {len(grid)}")
        print(f"   Folds: {len(folds)}")
        print(f"   Total fits: {len(units)}")

    if pool is not None:
        if not pool.running:
            raise RuntimeError("WorkerPool is not running; call start() first")
        outputs = pool.map(_run_unit, units)
    else:
        with WorkerPool() as own_pool:
            if verbose:
                print(f"   Workers: {own_pool.n_workers}")
            outputs = own_pool.map(_run_unit, units)

    records = [r for out in outputs for r in out['records']]
    preds = [out['predictions'] for out in outputs if out['predictions'] is not None]

    result = TuningResult(
        spec=spec,
        grid=grid.reset_index(drop=True),
        metrics=pd.DataFrame(records, columns=['config', 'fold', 'metric', 'estimate', 'error']),
        n_folds=len(folds),
        predictions=pd.concat(preds, ignore_index=True) if save_pred and preds else None,
        rows=pd.Index(np.concatenate([f.assessment.index.to_numpy() for f in folds])).sort_values()
    )

    if verbose:
        n_failed_units = sum(
            1 for out in outputs if all(r['error'] is not None for r in out['records'])
        )
        print(f"   Failed fits: {n_failed_units}/{len(units)}")
        print("   Search complete!")

    return result


def fit_resamples(
    spec: ModelSpec,
    folds: Sequence[Fold],
    recipe: FeatureRecipe,
    **kwargs
) -> TuningResult:
    """Resampled estimate for a model with no tuned parameters (one config)."""

    if not spec.is_final():
        raise ValueError(
            f"{spec.name} has tuned parameters {spec.tuned_parameters()}; use tune_grid"
        )
    return tune_grid(spec, folds, recipe, grid=_as_grid([{}], []), **kwargs)


# =============================================================================
# Selection
# =============================================================================

def _ranked(result: TuningResult, metric: str, max_failed_fraction: float) -> pd.DataFrame:
    summary = result.collect_metrics()
    if metric not in set(summary['metric']):
        raise SelectionError(f"Metric '{metric}' was not computed in this search")

    table = summary[summary['metric'] == metric].copy()
    table['order'] = np.arange(len(table))
    table['eligible'] = (
        table['mean'].notna()
        & (table['n'] > 0)
        & (table['n_failed'] / result.n_folds <= max_failed_fraction)
    )

    trainer = result.spec.trainer
    keys = [trainer.complexity_key({k: row[k] for k in result.param_names})
            for row in table.to_dict('records')]
    if keys and all(k is not None for k in keys):
        rank = {k: i for i, k in enumerate(sorted(set(keys)))}
        table['complexity'] = [rank[k] for k in keys]
    else:
        table['complexity'] = 0

    table = table.sort_values(
        ['eligible', 'mean', 'complexity', 'order'],
        ascending=[False, False, True, True],
        na_position='last'
    )
    return table.drop(columns=['order']).reset_index(drop=True)


def show_best(
    result: TuningResult,
    metric: str = 'roc_auc',
    n: int = 5,
    max_failed_fraction: float = 0.5
) -> pd.DataFrame:
    """Top ``n`` configurations ranked by mean ``metric`` (eligible first)."""
    return _ranked(result, metric, max_failed_fraction).head(n)


def select_best(
    result: TuningResult,
    metric: str = 'roc_auc',
    max_failed_fraction: float = 0.5
) -> Dict[str, Any]:
    """
    Assignment with the highest mean ``metric`` among eligible configs.

    A configuration is ineligible when the fraction of its folds that failed
    exceeds ``max_failed_fraction`` or when no fold succeeded. Ties go to the
    simplest model per the trainer's complexity ordering, otherwise to the
    first configuration evaluated.

    Returns
    -------
    dict
        Parameter values plus the 'config' identifier.
    """

    table = _ranked(result, metric, max_failed_fraction)
    eligible = table[table['eligible']]
    if eligible.empty:
        raise SelectionError(
            f"No eligible configuration for {result.spec.name}: every config failed "
            f"on more than {max_failed_fraction:.0%} of {result.n_folds} folds"
        )

    best = eligible.iloc[0]
    values = {k: _to_python(best[k]) for k in result.param_names}
    values['config'] = best['config']
    return values


def finalize_spec(spec: ModelSpec, params: Mapping[str, Any]) -> ModelSpec:
    """Replace the spec's tune() markers with selected values."""
    return spec.finalize(params)


def _to_python(value: Any) -> Any:
    if isinstance(value, np.generic):
        return value.item()
    return value
