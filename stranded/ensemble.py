"""
Model Stacking
==============

Candidate configurations from several searches are blended into a single
ensemble:

1. stack_candidates: collect every candidate's out-of-fold P(Stranded)
   (searches must be run with save_pred=True on the same folds)
2. blend_predictions: non-negative lasso on those probabilities; members
   whose weight shrinks to zero are dropped
3. fit_members: refit the retained members on the full Training set

The blend only sees out-of-fold predictions, so stacking weights are not
fit on the rows each member was trained on.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Sequence, Union

import numpy as np
import pandas as pd
from sklearn.linear_model import Lasso

from .config import make_rng, draw_seed
from .exceptions import DataError, SelectionError
from .models import FittedModel, ModelSpec, fit_model
from .preprocessing import FeatureRecipe
from .tuning import TuningResult


@dataclass(frozen=True)
class DataStack:
    """Out-of-fold probabilities, one column per candidate member."""
    data: pd.DataFrame
    truth: pd.Series
    specs: Dict[str, ModelSpec] = field(repr=False)
    params: Dict[str, Dict] = field(repr=False)

    @property
    def members(self) -> List[str]:
        return list(self.data.columns)


@dataclass(frozen=True)
class Blend:
    """Stacking coefficients for the retained members."""
    stack: DataStack = field(repr=False)
    intercept: float
    weights: Dict[str, float]
    penalty: float

    def member_table(self) -> pd.DataFrame:
        return (pd.DataFrame(list(self.weights.items()), columns=['member', 'weight'])
                .sort_values('weight', ascending=False)
                .reset_index(drop=True))


@dataclass(frozen=True)
class StackedEnsemble:
    """Blend of fitted members; same predict interface as FittedModel."""
    blend: Blend = field(repr=False)
    members: Dict[str, FittedModel] = field(repr=False)

    name = "stack"

    @property
    def schema(self):
        return next(iter(self.members.values())).schema

    def predict_proba(self, data: pd.DataFrame) -> np.ndarray:
        proba = np.full(len(data), self.blend.intercept, dtype=float)
        for member, weight in self.blend.weights.items():
            proba += weight * self.members[member].predict_proba(data)
        return np.clip(proba, 0.0, 1.0)

    def predict(self, data: pd.DataFrame, threshold: float = 0.5) -> np.ndarray:
        schema = self.schema
        return np.where(self.predict_proba(data) >= threshold,
                        schema.positive_class, schema.negative_class)


def stack_candidates(results: Sequence[TuningResult], verbose: bool = True) -> DataStack:
    """
    Collect out-of-fold predictions of every candidate configuration.

    Configurations missing predictions for any training row (failed folds)
    are left out of the stack.
    """

    if not results:
        raise DataError("No tuning results to stack")

    rows = results[0].rows
    for result in results[1:]:
        if rows is None or result.rows is None or not result.rows.equals(rows):
            raise DataError(
                f"{result.spec.name} was resampled on different rows; "
                "stack results from the same folds"
            )

    all_preds = [(result, result.collect_predictions()) for result in results]
    truth = pd.concat([preds.set_index('row')['truth'] for _, preds in all_preds])
    truth = truth[~truth.index.duplicated()].sort_index()

    columns = {}
    specs = {}
    params = {}

    for result, preds in all_preds:
        configs = result.grid.set_index('config')
        for config, group in preds.groupby('config', sort=False):
            member = f"{result.spec.name}_{config}"
            series = group.set_index('row')['prob'].sort_index()

            if rows is not None and not series.index.equals(rows):
                if verbose:
                    print(f"   Skipping {member}: predictions missing for failed folds")
                continue

            columns[member] = series
            specs[member] = result.spec
            params[member] = {k: configs.loc[config, k] for k in result.param_names}

    if not columns:
        raise SelectionError("No candidate has complete out-of-fold predictions")

    data = pd.DataFrame(columns)
    truth = truth.loc[data.index]
    return DataStack(data=data, truth=truth, specs=specs, params=params)


def blend_predictions(
    stack: DataStack,
    penalty: float = 1e-3,
    verbose: bool = True
) -> Blend:
    """
    Fit non-negative lasso stacking weights.

    Parameters
    ----------
    stack : DataStack
        Candidate out-of-fold probabilities.
    penalty : float, default=1e-3
        L1 strength; larger values keep fewer members.
    verbose : bool, default=True
        Print retained members.

    Raises
    ------
    SelectionError
        If every member weight is shrunk to zero.
    """

    meta = Lasso(alpha=penalty, positive=True, max_iter=10000)
    meta.fit(stack.data.to_numpy(), stack.truth.to_numpy().astype(float))

    weights = {
        member: float(w)
        for member, w in zip(stack.members, meta.coef_)
        if w > 0
    }
    if not weights:
        raise SelectionError(
            f"Blend with penalty={penalty} retained no members; try a smaller penalty"
        )

    blend = Blend(stack=stack, intercept=float(meta.intercept_), weights=weights,
                  penalty=penalty)

    if verbose:
        print(f"Stack retained {len(weights)} of {len(stack.members)} candidates:")
        for _, row in blend.member_table().iterrows():
            print(f"   {row['weight']:.4f} - {row['member']}")

    return blend


def fit_members(
    blend: Blend,
    training: pd.DataFrame,
    recipe: FeatureRecipe,
    rng: Union[int, np.random.Generator, None] = None
) -> StackedEnsemble:
    """Refit every retained member on the full Training data."""

    rng = make_rng(rng)
    members = {}
    for member in blend.weights:
        spec = blend.stack.specs[member]
        params = blend.stack.params[member]
        members[member] = fit_model(spec, training, recipe,
                                    params=params or None, rng=draw_seed(rng))

    return StackedEnsemble(blend=blend, members=members)
