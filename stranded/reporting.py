"""
Results and Plot Sinks
======================

The pipeline core only produces structured data. This module persists it:

- save_confusion_summary: confusion-matrix summary table -> timestamped CSV
- save_tuning_metrics: aggregated search metrics -> CSV
- plot_roc_curve / plot_tuning_metrics / plot_confusion_matrix: render the
  same data with matplotlib and seaborn
"""

from datetime import datetime
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns

from .evaluation import ConfusionMatrix, EvaluationResult


def save_confusion_summary(
    summary: pd.DataFrame,
    output_dir: Union[str, Path] = "outputs/evaluation",
    prefix: str = "confusion_matrix",
    timestamp: Optional[datetime] = None
) -> Path:
    """
    Save a confusion-matrix summary table to a timestamped CSV.

    Parameters
    ----------
    summary : pd.DataFrame
        Output of EvaluationResult.summary().
    output_dir : str or Path
        Directory for the file (created if missing).
    prefix : str
        File name prefix.
    timestamp : datetime, optional
        Defaults to now.

    Returns
    -------
    Path
        Written file, e.g. ``confusion_matrix_20240131_142500.csv``.
    """

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    stamp = (timestamp or datetime.now()).strftime('%Y%m%d_%H%M%S')
    output_path = output_dir / f"{prefix}_{stamp}.csv"

    summary.to_csv(output_path, index=False)
    print(f"Saved confusion matrix summary: {output_path}")

    return output_path


def save_tuning_metrics(
    metrics: pd.DataFrame,
    output_path: Union[str, Path]
) -> Path:
    """Save aggregated tuning metrics (TuningResult.collect_metrics())."""

    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    metrics.to_csv(output_path, index=False)
    print(f"Saved tuning metrics: {output_path}")
    return output_path


def plot_roc_curve(
    results: Sequence[EvaluationResult],
    save_path: Optional[Path] = None,
    figsize: Tuple[int, int] = (10, 8)
) -> plt.Figure:
    """
    Plot Holdout ROC curves, one line per evaluated model.

    AUC Interpretation:
    - 0.5: No discrimination (random guessing)
    - 0.7-0.8: Acceptable discrimination
    - 0.8-0.9: Good discrimination
    - >0.9: Excellent discrimination
    """

    fig, ax = plt.subplots(figsize=figsize)

    for result in results:
        ax.plot(result.roc['fpr'], result.roc['tpr'], lw=3,
                label=f'{result.model_name} (AUC = {result.roc_auc:.3f})')

    ax.plot([0, 1], [0, 1], color='gray', lw=2, linestyle='--',
            label='Random Classifier (AUC = 0.5)')

    ax.set_xlim([0.0, 1.0])
    ax.set_ylim([0.0, 1.05])
    ax.set_xlabel('False Positive Rate (1 - Specificity)', fontsize=14)
    ax.set_ylabel('True Positive Rate (Sensitivity)', fontsize=14)
    ax.set_title('ROC Curve - Stranded Patient Models', fontsize=16, fontweight='bold')
    ax.legend(loc='lower right', fontsize=12)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        _save(fig, save_path)

    return fig


def plot_tuning_metrics(
    metrics: pd.DataFrame,
    param: str,
    metric: str = 'roc_auc',
    color_by: Optional[str] = None,
    save_path: Optional[Path] = None,
    figsize: Tuple[int, int] = (10, 6)
) -> plt.Figure:
    """
    Mean resampled metric against one tuned parameter, with standard errors.

    ``metrics`` is TuningResult.collect_metrics(); ``color_by`` draws one line
    per value of a second tuned parameter.
    """

    table = metrics[metrics['metric'] == metric]
    if table.empty:
        raise ValueError(f"No rows for metric '{metric}'")

    fig, ax = plt.subplots(figsize=figsize)

    groups = table.groupby(color_by) if color_by else [(None, table)]
    for key, group in groups:
        group = group.sort_values(param)
        label = f'{color_by} = {key}' if color_by else metric
        ax.errorbar(group[param], group['mean'], yerr=group['std_err'].fillna(0),
                    marker='o', capsize=4, lw=2, label=label)

    if table[param].min() > 0 and table[param].max() / table[param].min() > 1e3:
        ax.set_xscale('log')

    ax.set_xlabel(param, fontsize=14)
    ax.set_ylabel(f'mean {metric}', fontsize=14)
    ax.set_title(f'Resampled {metric} by {param}', fontsize=16, fontweight='bold')
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)

    plt.tight_layout()

    if save_path:
        _save(fig, save_path)

    return fig


def plot_confusion_matrix(
    confusion: ConfusionMatrix,
    save_path: Optional[Path] = None,
    figsize: Tuple[int, int] = (8, 7)
) -> plt.Figure:
    """Heatmap of the Holdout confusion matrix with cell percentages."""

    table = confusion.as_table()

    fig, ax = plt.subplots(figsize=figsize)

    sns.heatmap(
        table,
        annot=True,
        fmt='d',
        cmap='Blues',
        ax=ax,
        annot_kws={'size': 16},
        square=True
    )

    ax.set_title('Confusion Matrix\nStranded Patient Prediction', fontsize=16, fontweight='bold')

    total = max(confusion.total, 1)
    annotation_text = (
        f"True Negatives: {confusion.tn:,} ({confusion.tn/total*100:.1f}%)\n"
        f"False Positives: {confusion.fp:,} ({confusion.fp/total*100:.1f}%)\n"
        f"False Negatives: {confusion.fn:,} ({confusion.fn/total*100:.1f}%)\n"
        f"True Positives: {confusion.tp:,} ({confusion.tp/total*100:.1f}%)"
    )
    fig.text(0.5, -0.05, annotation_text, ha='center', fontsize=11,
             style='italic', transform=ax.transAxes)

    plt.tight_layout()

    if save_path:
        _save(fig, save_path)

    return fig


def _save(fig: plt.Figure, save_path: Union[str, Path]) -> None:
    save_path = Path(save_path)
    save_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(save_path, dpi=150, bbox_inches='tight')
    print(f"   Saved: {save_path}")
