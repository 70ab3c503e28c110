"""
Model Evaluation Module
=======================

Clinical Context:
-----------------
The Holdout evaluation is the single, final, unbiased performance estimate.
Holdout rows must not have been used for recipe statistics, resampling or
hyperparameter selection.

Metrics reported:

1. Sensitivity (Recall): What % of stranded patients did we flag?
   - Missing a stranded patient delays discharge planning
2. Specificity: What % of short-stay patients did we correctly leave alone?
   - Low specificity overloads the discharge team with false alerts
3. Precision (PPV): What % of flagged patients actually become stranded?
4. Balanced accuracy / F1: single-number summaries robust to imbalance
5. AUC-ROC: ranking ability across all thresholds
   - 0.5: no discrimination, 0.7-0.8: acceptable, >0.8: good

SHAP Values: which (transformed) features drive the predictions.
"""

from dataclasses import dataclass, field
from typing import Dict, Tuple, Union

import numpy as np
import pandas as pd
import shap
from sklearn.metrics import (
    confusion_matrix,
    roc_curve,
    roc_auc_score,
    f1_score,
    recall_score,
    precision_score,
)
from sklearn.linear_model import LogisticRegression

from .config import make_rng, draw_seed
from .exceptions import DataError, FitError
from .models import FittedModel


def _safe_div(num: float, den: float) -> float:
    return float(num / den) if den else 0.0


@dataclass(frozen=True)
class ConfusionMatrix:
    """
    Counts of predictions vs truth, positive class = Stranded.

    Clinical Context:
    -----------------
    - True Positives (TP): stranded patients flagged -> early discharge planning
    - False Negatives (FN): stranded patients missed -> unplanned long stays
    - False Positives (FP): short stays flagged -> wasted planning effort
    - True Negatives (TN): short stays correctly left alone
    """
    tp: int
    fp: int
    fn: int
    tn: int
    positive_class: str = "Stranded"
    negative_class: str = "Not Stranded"

    @classmethod
    def from_predictions(
        cls,
        y_true: np.ndarray,
        y_pred: np.ndarray,
        positive_class: str = "Stranded",
        negative_class: str = "Not Stranded"
    ) -> "ConfusionMatrix":
        cm = confusion_matrix(y_true, y_pred, labels=[negative_class, positive_class])
        tn, fp, fn, tp = (int(v) for v in cm.ravel())
        return cls(tp=tp, fp=fp, fn=fn, tn=tn,
                   positive_class=positive_class, negative_class=negative_class)

    @property
    def total(self) -> int:
        return self.tp + self.fp + self.fn + self.tn

    @property
    def accuracy(self) -> float:
        return _safe_div(self.tp + self.tn, self.total)

    @property
    def sensitivity(self) -> float:
        return _safe_div(self.tp, self.tp + self.fn)

    @property
    def specificity(self) -> float:
        return _safe_div(self.tn, self.tn + self.fp)

    @property
    def balanced_accuracy(self) -> float:
        return (self.sensitivity + self.specificity) / 2

    @property
    def precision(self) -> float:
        return _safe_div(self.tp, self.tp + self.fp)

    @property
    def f1(self) -> float:
        return _safe_div(2 * self.precision * self.sensitivity,
                         self.precision + self.sensitivity)

    def metrics(self) -> Dict[str, float]:
        return {
            'accuracy': self.accuracy,
            'sensitivity': self.sensitivity,
            'specificity': self.specificity,
            'balanced_accuracy': self.balanced_accuracy,
            'precision': self.precision,
            'f1': self.f1,
        }

    def as_table(self) -> pd.DataFrame:
        """2x2 table: rows = predicted class, columns = true class."""
        labels = [self.positive_class, self.negative_class]
        return pd.DataFrame(
            [[self.tp, self.fp], [self.fn, self.tn]],
            index=pd.Index(labels, name='Prediction'),
            columns=pd.Index(labels, name='Truth')
        )


@dataclass(frozen=True)
class EvaluationResult:
    """Holdout predictions and every derived metric."""
    model_name: str
    truth: np.ndarray = field(repr=False)
    predictions: np.ndarray = field(repr=False)
    probabilities: np.ndarray = field(repr=False)
    roc: pd.DataFrame = field(repr=False)
    roc_auc: float
    confusion: ConfusionMatrix
    threshold: float = 0.5

    def summary(self) -> pd.DataFrame:
        """
        Tabular summary for the results sink: confusion counts followed by
        derived metrics, one (metric, estimate) row each.
        """

        rows = [
            ('true_positive', self.confusion.tp),
            ('false_positive', self.confusion.fp),
            ('false_negative', self.confusion.fn),
            ('true_negative', self.confusion.tn),
            ('roc_auc', self.roc_auc),
        ]
        rows.extend(self.confusion.metrics().items())
        table = pd.DataFrame(rows, columns=['metric', 'estimate'])
        table.insert(0, 'model', self.model_name)
        return table


def evaluate_model(
    model: FittedModel,
    holdout: pd.DataFrame,
    threshold: float = 0.5,
    verbose: bool = True
) -> EvaluationResult:
    """
    Final evaluation of a fitted model on Holdout data.

    Parameters
    ----------
    model : FittedModel or StackedEnsemble
        Model trained with selected hyperparameters on the full Training set.
        Anything with ``name``, ``schema`` and ``predict_proba`` works.
    holdout : pd.DataFrame
        Untouched Holdout rows (target + predictors).
    threshold : float, default=0.5
        Probability threshold for the 'Stranded' label.
    verbose : bool, default=True
        Print the metric report.

    Returns
    -------
    EvaluationResult
        Predictions, probabilities, ROC curve, AUC and confusion matrix.

    Clinical Note:
    --------------
    The default threshold of 0.5 may not match discharge-team capacity.
    Use find_optimal_threshold to see the trade-off at other cut-offs.
    """

    schema = model.schema
    if schema.target not in holdout.columns:
        raise DataError(f"Holdout data has no target column '{schema.target}'")
    if len(holdout) == 0:
        raise DataError("Holdout data is empty")

    y_true = holdout[schema.target].to_numpy()
    y_binary = (y_true == schema.positive_class).astype(int)

    proba = model.predict_proba(holdout)
    y_pred = np.where(proba >= threshold, schema.positive_class, schema.negative_class)

    cm = ConfusionMatrix.from_predictions(
        y_true, y_pred,
        positive_class=schema.positive_class,
        negative_class=schema.negative_class
    )

    if len(np.unique(y_binary)) == 2:
        fpr, tpr, thresholds = roc_curve(y_binary, proba, drop_intermediate=False)
        # First threshold is inf (nothing predicted positive); probabilities cap at 1
        thresholds = np.minimum(thresholds, 1.0)
        auc_value = float(roc_auc_score(y_binary, proba))
    else:
        fpr, tpr, thresholds = np.array([]), np.array([]), np.array([])
        auc_value = float('nan')

    result = EvaluationResult(
        model_name=model.name,
        truth=y_true,
        predictions=y_pred,
        probabilities=proba,
        roc=pd.DataFrame({'fpr': fpr, 'tpr': tpr, 'threshold': thresholds}),
        roc_auc=auc_value,
        confusion=cm,
        threshold=threshold
    )

    if verbose:
        _print_evaluation(result)

    return result


def _print_evaluation(result: EvaluationResult) -> None:
    cm = result.confusion

    print("="*60)
    print(f"MODEL EVALUATION: {result.model_name}")
    print("="*60)

    print("\n1. CONFUSION MATRIX")
    print("-"*40)
    print(cm.as_table().to_string())

    print("\n2. CLASSIFICATION METRICS")
    print("-"*40)
    print(f"   Accuracy:          {cm.accuracy:.3f}")
    print(f"   Sensitivity:       {cm.sensitivity:.3f}")
    print(f"   Specificity:       {cm.specificity:.3f}")
    print(f"   Balanced accuracy: {cm.balanced_accuracy:.3f}")
    print(f"   Precision:         {cm.precision:.3f}")
    print(f"   F1 Score:          {cm.f1:.3f}")

    print(f"\n3. AUC-ROC: {result.roc_auc:.3f}")
    print("="*60 + "\n")


def find_optimal_threshold(
    result: EvaluationResult,
    metric: str = 'f1'
) -> Tuple[float, pd.DataFrame]:
    """
    Find the probability threshold that maximises a metric.

    Parameters
    ----------
    result : EvaluationResult
        Holdout evaluation.
    metric : str, default='f1'
        Metric to optimize ('f1', 'recall', 'precision').

    Returns
    -------
    optimal_threshold : float
        Threshold that maximizes the chosen metric.
    metrics_by_threshold : pd.DataFrame
        Metrics at each candidate threshold.
    """

    if metric not in ('f1', 'recall', 'precision'):
        raise ValueError(f"Unknown metric '{metric}'")

    y_true = (result.truth == result.confusion.positive_class).astype(int)
    thresholds = np.round(np.arange(0.1, 0.9, 0.05), 2)
    rows = []

    for thresh in thresholds:
        y_pred = (result.probabilities >= thresh).astype(int)
        rows.append({
            'threshold': thresh,
            'recall': recall_score(y_true, y_pred, zero_division=0),
            'precision': precision_score(y_true, y_pred, zero_division=0),
            'f1': f1_score(y_true, y_pred, zero_division=0)
        })

    metrics_df = pd.DataFrame(rows)
    optimal_threshold = float(metrics_df.loc[metrics_df[metric].idxmax(), 'threshold'])

    return optimal_threshold, metrics_df


def explain_with_shap(
    model: FittedModel,
    data: pd.DataFrame,
    n_samples: int = 100,
    rng: Union[int, np.random.Generator, None] = 42
) -> pd.DataFrame:
    """
    Mean absolute SHAP value per transformed feature.

    Parameters
    ----------
    model : FittedModel
        Tree model (decision tree, random forest, XGBoost) or logistic
        regression.
    data : pd.DataFrame
        Raw rows to explain (typically Holdout).
    n_samples : int, default=100
        Rows sampled for the explanation.
    rng : int or np.random.Generator
        Sampling seed.

    Returns
    -------
    pd.DataFrame
        Columns 'feature' and 'mean_abs_shap', most influential first.
    """

    X = model.recipe.apply(data)
    if len(X) > n_samples:
        X = X.sample(n=n_samples, random_state=draw_seed(make_rng(rng)))

    estimator = model.estimator
    if isinstance(estimator, LogisticRegression):
        background, _ = model.recipe.juice()
        explainer = shap.LinearExplainer(estimator, background)
    else:
        try:
            explainer = shap.TreeExplainer(estimator)
        except Exception as e:
            raise FitError(f"SHAP cannot explain {model.name}: {e}") from e

    values = _positive_class_values(explainer.shap_values(X))

    importance = pd.DataFrame({
        'feature': X.columns,
        'mean_abs_shap': np.abs(values).mean(axis=0)
    }).sort_values('mean_abs_shap', ascending=False)

    return importance.reset_index(drop=True)


def _positive_class_values(shap_values) -> np.ndarray:
    # Older shap returns a per-class list; newer returns (rows, features, classes)
    if isinstance(shap_values, list):
        return np.asarray(shap_values[-1])
    values = np.asarray(shap_values)
    if values.ndim == 3:
        return values[:, :, -1]
    return values
