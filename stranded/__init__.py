# Stranded Patient Prediction: Model Selection Pipeline
# Split, resample, tune, select and evaluate classifiers for long-stay risk

from .config import DatasetSchema, PipelineConfig, STRANDED_SCHEMA
from .exceptions import DataError, FitError, SearchError, SelectionError, StrandedError
from .data_loader import load_stranded_data, prepare_dataset, make_synthetic_stranded
from .partition import Split, Fold, initial_split, vfold_cv
from .preprocessing import FeatureRecipe, PreparedRecipe, minority_ratio
from .models import ModelSpec, FittedModel, fit_model, tune
from .tuning import (
    WorkerPool,
    TuningResult,
    grid_regular,
    grid_max_entropy,
    tune_grid,
    fit_resamples,
    show_best,
    select_best,
    finalize_spec,
)
from .evaluation import (
    ConfusionMatrix,
    EvaluationResult,
    evaluate_model,
    find_optimal_threshold,
    explain_with_shap,
)
from .ensemble import stack_candidates, blend_predictions, fit_members
from .pipeline import PipelineResult, default_model_specs, run_pipeline

__version__ = "1.0.0"
