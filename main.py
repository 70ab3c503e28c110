#!/usr/bin/env python3
"""
Stranded Patient Prediction Pipeline
====================================

Healthcare Analytics Project
Predicting which inpatients will become "stranded" (long length of stay)

This script orchestrates the model selection pipeline:
1. Data loading (local CSV, or a synthetic cohort for demos)
2. Training / Holdout split (stratified on the outcome)
3. Feature recipe: date decomposition, oversampling, one-hot encoding,
   zero-variance filter, normalization
4. Cross-validation folds on the Training data
5. Hyperparameter search for each model family on a worker pool
6. Selection of the best configuration per model (resampled metric)
7. Final fit on Training and evaluation on the untouched Holdout
8. Optional stacked ensemble and SHAP feature importance

Clinical Goal:
--------------
Flag likely stranded patients at admission so discharge teams can start
planning early, reducing bed days lost to delayed discharge.

Usage:
------
    python main.py --data data/stranded_data.csv
    python main.py --synthetic 1000                 # Demo on a generated cohort
    python main.py --models logistic_reg decision_tree --folds 10
    python main.py --ensemble --no-plots
"""

import argparse
import sys
import warnings
from pathlib import Path
from datetime import datetime

import numpy as np

# Suppress warnings for cleaner output
warnings.filterwarnings('ignore')

sys.path.insert(0, str(Path(__file__).parent))

from stranded.config import PipelineConfig, STRANDED_SCHEMA
from stranded.data_loader import load_stranded_data, make_synthetic_stranded
from stranded.evaluation import explain_with_shap, find_optimal_threshold
from stranded.exceptions import StrandedError
from stranded.pipeline import run_pipeline
from stranded.reporting import (
    save_confusion_summary,
    save_tuning_metrics,
    plot_roc_curve,
    plot_tuning_metrics,
    plot_confusion_matrix,
)


def print_header():
    """Print pipeline header."""

    header = """
╔══════════════════════════════════════════════════════════════════════════════╗
║                     STRANDED PATIENT PREDICTION PIPELINE                     ║
║                                                                              ║
║            Healthcare Analytics: Long Length-of-Stay Risk at Admission       ║
╚══════════════════════════════════════════════════════════════════════════════╝
    """
    print(header)
    print(f"Started at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print("="*80 + "\n")


def print_section(title: str):
    """Print section separator."""
    print("\n" + "="*80)
    print(f"  {title}")
    print("="*80 + "\n")


def main(
    config: PipelineConfig,
    data_path: str = None,
    synthetic: int = None,
    ensemble: bool = False,
    make_plots: bool = True
):
    """
    Run the complete stranded patient model selection pipeline.

    Parameters
    ----------
    config : PipelineConfig
        Split, resampling and tuning settings.
    data_path : str, optional
        Local CSV with the stranded patient data.
    synthetic : int, optional
        Generate this many synthetic admissions instead of reading a file.
    ensemble : bool
        Also fit a stacked ensemble of every candidate configuration.
    make_plots : bool
        Save ROC, tuning and confusion matrix plots.
    """

    print_header()
    output_dir = Path(config.output_dir)

    # =========================================================================
    # STEP 1: DATA LOADING
    # =========================================================================
    print_section("STEP 1: DATA LOADING")

    if synthetic:
        print(f"Generating {synthetic:,} synthetic admissions (30% stranded)...\n")
        df = make_synthetic_stranded(n=synthetic, rng=np.random.default_rng(config.seed))
    else:
        df = load_stranded_data(data_path, schema=STRANDED_SCHEMA)

    print(f"Loaded {len(df):,} admissions with {len(STRANDED_SCHEMA.predictors)} predictors")

    # =========================================================================
    # STEP 2-7: SPLIT, RESAMPLE, TUNE, SELECT, EVALUATE
    # =========================================================================
    print_section("STEP 2: MODEL SELECTION")

    print(f"  - {config.split_prop:.0%} / {1 - config.split_prop:.0%} Training / Holdout split (stratified)")
    print(f"  - {config.n_folds}-fold cross-validation on Training")
    print(f"  - Models: {', '.join(config.models)}")
    print(f"  - Selection metric: {config.target_metric}\n")

    result = run_pipeline(df, config=config, schema=STRANDED_SCHEMA, ensemble=ensemble)

    # =========================================================================
    # STEP 3: SAVE RESULTS
    # =========================================================================
    print_section("STEP 3: SAVE RESULTS")

    for name, tuned in result.tuning.items():
        save_tuning_metrics(tuned.collect_metrics(),
                            output_dir / "tuning" / f"{name}_metrics.csv")

    for name, evaluation in result.evaluations.items():
        save_confusion_summary(evaluation.summary(),
                               output_dir=output_dir / "evaluation",
                               prefix=f"confusion_matrix_{name}")

    comparison = result.comparison()
    comparison_path = output_dir / "model_comparison.csv"
    comparison_path.parent.mkdir(parents=True, exist_ok=True)
    comparison.to_csv(comparison_path, index=False)
    print(f"Saved model comparison: {comparison_path}")

    if make_plots:
        plot_roc_curve(list(result.evaluations.values()),
                       save_path=output_dir / "evaluation" / "roc_curve.png")

        best_eval = result.evaluations[result.best_model]
        plot_confusion_matrix(best_eval.confusion,
                              save_path=output_dir / "evaluation" / "confusion_matrix.png")

        for name, tuned in result.tuning.items():
            params = tuned.param_names
            if not params:
                continue
            plot_tuning_metrics(
                tuned.collect_metrics(),
                param=params[0],
                metric=config.target_metric,
                color_by=params[1] if len(params) == 2 else None,
                save_path=output_dir / "tuning" / f"{name}_{params[0]}.png"
            )
    else:
        print("Plots skipped (--no-plots)")

    # =========================================================================
    # STEP 4: BEST MODEL REVIEW
    # =========================================================================
    print_section("STEP 4: BEST MODEL REVIEW")

    best_eval = result.evaluations[result.best_model]
    threshold, _ = find_optimal_threshold(best_eval, metric='f1')
    print(f"Best model by resampled {config.target_metric}: {result.best_model}")
    print(f"Selected parameters: {result.selected[result.best_model]}")
    print(f"F1-optimal threshold on Holdout: {threshold:.2f}")

    try:
        importance = explain_with_shap(result.fitted[result.best_model], result.split.holdout)
        print("\nTop features by mean |SHAP|:")
        print(importance.head(10).to_string(index=False))
    except StrandedError as e:
        print(f"\nSHAP analysis skipped: {e}")

    # =========================================================================
    # PIPELINE COMPLETE
    # =========================================================================
    print("\n" + "="*80)
    print("  PIPELINE COMPLETE")
    print("="*80)

    print(f"""
Summary:
--------
• Training rows: {len(result.split.training):,}
• Holdout rows: {len(result.split.holdout):,}
• Models compared: {len(result.tuning)}

Key Results ({result.best_model}, Holdout):
------------
• AUC-ROC: {best_eval.roc_auc:.3f}
• Sensitivity: {best_eval.confusion.sensitivity:.3f}
• Specificity: {best_eval.confusion.specificity:.3f}

Output Files:
-------------
• Tuning metrics: {output_dir / 'tuning'}
• Evaluation tables and plots: {output_dir / 'evaluation'}
• Model comparison: {comparison_path}

Completed at: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}
    """)

    return result


def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Stranded Patient Prediction Pipeline"
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        '--data',
        help='Path to the stranded patient CSV'
    )
    source.add_argument(
        '--synthetic',
        type=int,
        metavar='N',
        help='Run on N synthetic admissions instead of a CSV'
    )

    parser.add_argument(
        '--models',
        nargs='+',
        default=PipelineConfig().models,
        help='Model families to compare'
    )
    parser.add_argument('--folds', type=int, default=5, help='Cross-validation folds')
    parser.add_argument('--split', type=float, default=0.75, help='Training proportion')
    parser.add_argument('--seed', type=int, default=42, help='Random seed')
    parser.add_argument(
        '--workers',
        type=int,
        default=None,
        help='Worker processes for the search (default: all cores but one)'
    )
    parser.add_argument(
        '--metric',
        choices=['roc_auc', 'accuracy'],
        default='roc_auc',
        help='Metric used to select hyperparameters and the best model'
    )
    parser.add_argument('--grid-levels', type=int, default=3,
                        help='Levels per parameter for regular grids')
    parser.add_argument('--grid-size', type=int, default=20,
                        help='Size of max-entropy grids')
    parser.add_argument('--no-plots', action='store_true', help='Do not save plots')
    parser.add_argument('--ensemble', action='store_true',
                        help='Fit a stacked ensemble of all candidates')
    parser.add_argument('--output-dir', default='outputs', help='Output directory')

    return parser.parse_args(argv)


def config_from_args(args) -> PipelineConfig:
    return PipelineConfig(
        split_prop=args.split,
        n_folds=args.folds,
        seed=args.seed,
        n_workers=args.workers,
        target_metric=args.metric,
        grid_levels=args.grid_levels,
        grid_size=args.grid_size,
        models=list(args.models),
        output_dir=args.output_dir,
    ).validate()


if __name__ == "__main__":
    args = parse_args()

    try:
        results = main(
            config=config_from_args(args),
            data_path=args.data,
            synthetic=args.synthetic,
            ensemble=args.ensemble,
            make_plots=not args.no_plots
        )
    except StrandedError as e:
        print(f"\n✗ Pipeline failed: {e}")
        sys.exit(1)
