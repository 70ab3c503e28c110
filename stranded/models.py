"""
Model Trainers
==============

Clinical Context:
-----------------
Four model families are compared for stranded-patient prediction:

1. Logistic regression: transparent baseline, coefficients map directly to
   odds ratios clinicians already understand
2. Random forest: robust non-linear model with a fixed number of trees
3. Decision tree: a single, explainable rule set; tuned on cost-complexity
   pruning and depth so it does not memorise individual admissions
4. Gradient-boosted trees (XGBoost): usually the strongest discriminator;
   tuned on leaf size, depth, learning rate and minimum loss reduction

The set of families is closed. Each trainer declares its tunable parameters
and their valid ranges, and a complexity ordering used to break ties when
two configurations score the same.
"""

import warnings
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

import numpy as np
import pandas as pd
from sklearn.exceptions import ConvergenceWarning
from sklearn.linear_model import LogisticRegression
from sklearn.ensemble import RandomForestClassifier
from sklearn.tree import DecisionTreeClassifier
from xgboost import XGBClassifier

from .config import make_rng, draw_seed
from .exceptions import FitError
from .preprocessing import FeatureRecipe, PreparedRecipe


class _TuneMarker:
    """Placeholder for a hyperparameter whose value comes from a search."""

    def __repr__(self) -> str:
        return "tune()"


TUNE = _TuneMarker()


def tune() -> _TuneMarker:
    """Mark a hyperparameter as 'to be tuned'."""
    return TUNE


def is_tune(value: Any) -> bool:
    return isinstance(value, _TuneMarker)


# =============================================================================
# Parameter space
# =============================================================================

@dataclass(frozen=True)
class Parameter:
    """
    Valid range (or levels) of one tunable hyperparameter.

    Ranges are expressed on the transformed scale: a ``log10`` parameter with
    ``low=-10, high=-1`` spans 1e-10 to 1e-1.
    """
    name: str
    low: Optional[float] = None
    high: Optional[float] = None
    transform: str = "identity"
    integer: bool = False
    levels: Optional[Tuple[Any, ...]] = None

    def __post_init__(self):
        if self.levels is None:
            if self.low is None or self.high is None or self.low > self.high:
                raise ValueError(f"Parameter '{self.name}' needs low <= high or levels")
        if self.transform not in ("identity", "log10"):
            raise ValueError(f"Unknown transform '{self.transform}' for '{self.name}'")

    def from_unit(self, u: float) -> Any:
        """Map u in [0, 1] onto the parameter's range."""
        if self.levels is not None:
            idx = min(int(np.floor(u * len(self.levels))), len(self.levels) - 1)
            return self.levels[idx]
        return self._finalize(self.low + u * (self.high - self.low))

    def regular_values(self, n: int) -> List[Any]:
        """``n`` evenly spaced values on the transformed scale."""
        if self.levels is not None:
            if n >= len(self.levels):
                return list(self.levels)
            idx = np.unique(np.round(np.linspace(0, len(self.levels) - 1, n)).astype(int))
            return [self.levels[i] for i in idx]
        if n == 1:
            points = [(self.low + self.high) / 2]
        else:
            points = np.linspace(self.low, self.high, n)
        values = [self._finalize(p) for p in points]
        # Integer rounding can collapse neighbouring levels
        return list(dict.fromkeys(values))

    def _finalize(self, raw: float) -> Any:
        value = 10 ** raw if self.transform == "log10" else raw
        if self.integer:
            return int(round(value))
        return float(value)


# =============================================================================
# Trainers
# =============================================================================

class ModelTrainer(ABC):
    """
    Base class for a model family.

    Subclasses set ``name``, ``tunable`` (parameter schema) and ``defaults``
    (values used when a parameter is neither given nor tuned) and implement
    ``build``.
    """

    name: str = ""
    tunable: Dict[str, Parameter] = {}
    defaults: Dict[str, Any] = {}

    @abstractmethod
    def build(self, params: Mapping[str, Any], random_state: int):
        """Create an unfitted estimator from concrete parameters."""

    def complexity_key(self, params: Mapping[str, Any]) -> Optional[Tuple]:
        """Sort key where smaller means simpler; None if unknown."""
        return None

    def resolve(self, params: Mapping[str, Any]) -> Dict[str, Any]:
        """Merge defaults with given values; every value must be concrete."""

        unknown = set(params) - set(self.defaults) - set(self.tunable)
        if unknown:
            raise FitError(f"{self.name} does not accept parameters {sorted(unknown)}")

        resolved = dict(self.defaults)
        resolved.update(params)
        pending = [k for k, v in resolved.items() if is_tune(v)]
        if pending:
            raise FitError(f"{self.name} has untuned parameters: {pending}")

        for key, param in self.tunable.items():
            if param.integer and resolved.get(key) is not None:
                resolved[key] = int(resolved[key])
        return resolved

    def fit(
        self,
        X: pd.DataFrame,
        y: pd.Series,
        params: Optional[Mapping[str, Any]] = None,
        random_state: int = 42
    ):
        """
        Fit an estimator; any failure is raised as FitError.

        Convergence warnings are escalated so a non-converged model is never
        silently scored.
        """

        estimator = self.build(self.resolve(params or {}), random_state)

        try:
            with warnings.catch_warnings():
                warnings.simplefilter("error", ConvergenceWarning)
                estimator.fit(X, y)
        except ConvergenceWarning as e:
            raise FitError(f"{self.name} failed to converge: {e}") from e
        except Exception as e:
            raise FitError(f"{self.name} fit failed: {type(e).__name__}: {e}") from e

        return estimator

    def predict_proba(self, estimator, X: pd.DataFrame) -> np.ndarray:
        """Probability of the positive class for each row."""

        n_expected = getattr(estimator, "n_features_in_", X.shape[1])
        if X.shape[1] != n_expected:
            raise FitError(
                f"{self.name} was fit on {n_expected} features but received {X.shape[1]}"
            )
        return estimator.predict_proba(X)[:, 1]

    def __repr__(self) -> str:
        return f"{type(self).__name__}()"


class LogisticRegressionTrainer(ModelTrainer):
    """Logistic regression; no tunable structural hyperparameters."""

    name = "logistic_reg"
    tunable = {}
    defaults = {"max_iter": 1000}

    def build(self, params, random_state):
        return LogisticRegression(max_iter=params["max_iter"], random_state=random_state)


class RandomForestTrainer(ModelTrainer):
    """Random forest with a fixed tree count."""

    name = "rand_forest"
    tunable = {
        "min_n": Parameter("min_n", 2, 40, integer=True),
    }
    defaults = {"trees": 100, "min_n": 2}

    def build(self, params, random_state):
        return RandomForestClassifier(
            n_estimators=params["trees"],
            min_samples_split=params["min_n"],
            random_state=random_state,
            n_jobs=1
        )

    def complexity_key(self, params):
        # Larger splits -> smaller trees
        return (-params.get("min_n", self.defaults["min_n"]),)


class DecisionTreeTrainer(ModelTrainer):
    """CART tree tuned on cost-complexity pruning and depth."""

    name = "decision_tree"
    tunable = {
        "cost_complexity": Parameter("cost_complexity", -10, -1, transform="log10"),
        "tree_depth": Parameter("tree_depth", 1, 15, integer=True),
        "min_n": Parameter("min_n", 2, 40, integer=True),
    }
    defaults = {"cost_complexity": 0.01, "tree_depth": 30, "min_n": 2}

    def build(self, params, random_state):
        return DecisionTreeClassifier(
            ccp_alpha=params["cost_complexity"],
            max_depth=params["tree_depth"],
            min_samples_split=params["min_n"],
            random_state=random_state
        )

    def complexity_key(self, params):
        return (
            params.get("tree_depth", self.defaults["tree_depth"]),
            -params.get("cost_complexity", self.defaults["cost_complexity"]),
        )


class BoostedTreeTrainer(ModelTrainer):
    """XGBoost gradient-boosted trees."""

    name = "boost_tree"
    tunable = {
        "min_n": Parameter("min_n", 2, 40, integer=True),
        "tree_depth": Parameter("tree_depth", 1, 15, integer=True),
        "learn_rate": Parameter("learn_rate", -10, -1, transform="log10"),
        "loss_reduction": Parameter("loss_reduction", -10, 1.5, transform="log10"),
    }
    defaults = {
        "trees": 200,
        "min_n": 5,
        "tree_depth": 6,
        "learn_rate": 0.1,
        "loss_reduction": 0.1,
    }

    def build(self, params, random_state):
        return XGBClassifier(
            n_estimators=params["trees"],
            min_child_weight=params["min_n"],
            max_depth=params["tree_depth"],
            learning_rate=params["learn_rate"],
            gamma=params["loss_reduction"],
            random_state=random_state,
            n_jobs=1,
            eval_metric='auc',
            tree_method='hist'
        )

    def complexity_key(self, params):
        return (
            params.get("tree_depth", self.defaults["tree_depth"]),
            -params.get("min_n", self.defaults["min_n"]),
            -params.get("loss_reduction", self.defaults["loss_reduction"]),
        )


TRAINERS: Dict[str, ModelTrainer] = {
    t.name: t for t in (
        LogisticRegressionTrainer(),
        RandomForestTrainer(),
        DecisionTreeTrainer(),
        BoostedTreeTrainer(),
    )
}


def get_trainer(name: str) -> ModelTrainer:
    """Look up a trainer in the closed registry."""
    try:
        return TRAINERS[name]
    except KeyError:
        raise FitError(f"Unknown model '{name}'. Available: {sorted(TRAINERS)}") from None


# =============================================================================
# Model specification and fitted models
# =============================================================================

@dataclass(frozen=True)
class ModelSpec:
    """
    A model family plus hyperparameter values or tune() markers.

    Examples
    --------
    >>> spec = ModelSpec.create("decision_tree", cost_complexity=tune(), tree_depth=tune())
    >>> spec.tuned_parameters()
    ['cost_complexity', 'tree_depth']
    """
    trainer: ModelTrainer
    params: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def create(cls, name: str, **params) -> "ModelSpec":
        trainer = get_trainer(name)
        unknown = set(params) - set(trainer.defaults) - set(trainer.tunable)
        if unknown:
            raise FitError(f"{name} does not accept parameters {sorted(unknown)}")
        for key, value in params.items():
            if is_tune(value) and key not in trainer.tunable:
                raise FitError(f"Parameter '{key}' of {name} cannot be tuned")
        return cls(trainer=trainer, params=dict(params))

    @property
    def name(self) -> str:
        return self.trainer.name

    def tuned_parameters(self) -> List[str]:
        return [k for k, v in self.params.items() if is_tune(v)]

    def parameter_space(self) -> List[Parameter]:
        return [self.trainer.tunable[k] for k in self.tuned_parameters()]

    def is_final(self) -> bool:
        return not self.tuned_parameters()

    def finalize(self, values: Mapping[str, Any]) -> "ModelSpec":
        """Substitute tuned values; every tune() marker must be covered."""

        missing = [k for k in self.tuned_parameters() if k not in values]
        if missing:
            raise FitError(f"No values supplied for tuned parameters {missing}")
        params = dict(self.params)
        params.update({k: values[k] for k in self.tuned_parameters()})
        return ModelSpec(trainer=self.trainer, params=params)

    def __repr__(self) -> str:
        args = ", ".join(f"{k}={v!r}" for k, v in self.params.items())
        return f"ModelSpec({self.name}: {args})"


@dataclass(frozen=True)
class FittedModel:
    """Fitted recipe plus fitted estimator, with concrete parameters."""
    spec: ModelSpec
    params: Dict[str, Any]
    recipe: PreparedRecipe
    estimator: Any = field(repr=False)

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def schema(self):
        return self.recipe.schema

    @property
    def class_labels(self) -> Tuple[str, str]:
        return self.recipe.schema.class_labels

    def predict_proba(self, data: pd.DataFrame) -> np.ndarray:
        """P(Stranded) for each row of raw ``data``."""
        X = self.recipe.apply(data)
        return self.spec.trainer.predict_proba(self.estimator, X)

    def predict(self, data: pd.DataFrame, threshold: float = 0.5) -> np.ndarray:
        """Hard class labels ('Stranded' / 'Not Stranded')."""
        proba = self.predict_proba(data)
        negative, positive = self.class_labels
        return np.where(proba >= threshold, positive, negative)


def fit_model(
    spec: ModelSpec,
    training: pd.DataFrame,
    recipe: FeatureRecipe,
    params: Optional[Mapping[str, Any]] = None,
    rng: Union[int, np.random.Generator, None] = None
) -> FittedModel:
    """
    Fit recipe and model on ``training``.

    Parameters
    ----------
    spec : ModelSpec
        Model family; tune() markers must be covered by ``params``.
    training : pd.DataFrame
        Raw rows (target + predictors).
    recipe : FeatureRecipe
        Unfit recipe; fit here on ``training`` only.
    params : dict, optional
        Values for the spec's tuned parameters. Other names raise FitError.
    rng : int or np.random.Generator, optional
        Seeds oversampling and the estimator.

    Returns
    -------
    FittedModel
    """

    rng = make_rng(rng)
    if params:
        # 'config' is the selection label returned by select_best
        extra = [k for k in params if k != 'config' and k not in spec.tuned_parameters()]
        if extra:
            raise FitError(
                f"{spec.name} does not tune {extra}; set them on the ModelSpec instead"
            )
        if not spec.is_final():
            spec = spec.finalize(params)
    elif not spec.is_final():
        raise FitError(f"{spec.name} has untuned parameters: {spec.tuned_parameters()}")

    prepared = recipe.fit(training, rng=draw_seed(rng))
    X, y = prepared.juice()
    concrete = spec.trainer.resolve(spec.params)
    estimator = spec.trainer.fit(X, y, concrete, random_state=draw_seed(rng))

    return FittedModel(spec=spec, params=concrete, recipe=prepared, estimator=estimator)
