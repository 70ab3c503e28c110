"""Configuration objects: dataset schema and pipeline settings."""

import os
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

import numpy as np

from .exceptions import DataError


POSITIVE_CLASS = "Stranded"
NEGATIVE_CLASS = "Not Stranded"

SUPPORTED_METRICS = ("roc_auc", "accuracy")


@dataclass(frozen=True)
class DatasetSchema:
    """
    Explicit target/predictor declaration for a dataset.

    Replaces a symbolic ``target ~ .`` formula: the target and every
    predictor are named up front so missing columns fail fast.
    """
    target: str
    predictors: Tuple[str, ...]
    date_columns: Tuple[str, ...] = ()
    drop_columns: Tuple[str, ...] = ()
    positive_class: str = POSITIVE_CLASS
    negative_class: str = NEGATIVE_CLASS

    @property
    def columns(self) -> List[str]:
        return [self.target, *self.predictors]

    @property
    def class_labels(self) -> Tuple[str, str]:
        # Order matters: index 1 is the event class for probabilities
        return (self.negative_class, self.positive_class)

    def missing_columns(self, columns) -> List[str]:
        present = set(columns)
        return [c for c in self.columns if c not in present]


STRANDED_SCHEMA = DatasetSchema(
    target="stranded.label",
    predictors=(
        "age",
        "care.home.referral",
        "medicallysafe",
        "hcop",
        "mental_health_care",
        "periods_of_previous_care",
        "admit_date",
        "frailty_index",
    ),
    date_columns=("admit_date",),
)


@dataclass
class PipelineConfig:
    """Configuration object for splitting, resampling, tuning and evaluation."""
    split_prop: float = 0.75
    n_folds: int = 5
    seed: int = 42
    stratify: bool = True
    n_workers: Optional[int] = None
    target_metric: str = "roc_auc"
    grid_levels: int = 3
    grid_size: int = 20
    max_failed_fraction: float = 0.5
    over_ratio: Optional[float] = None
    models: List[str] = field(
        default_factory=lambda: ["logistic_reg", "rand_forest", "decision_tree", "boost_tree"]
    )
    output_dir: str = "outputs"

    def validate(self) -> "PipelineConfig":
        """Raise DataError on the first invalid setting."""
        if not 0 < self.split_prop < 1:
            raise DataError(f"split_prop must be in (0, 1), got {self.split_prop}")
        if self.n_folds < 2:
            raise DataError(f"n_folds must be >= 2, got {self.n_folds}")
        if self.target_metric not in SUPPORTED_METRICS:
            raise DataError(
                f"target_metric must be one of {SUPPORTED_METRICS}, got '{self.target_metric}'"
            )
        if self.grid_levels < 1 or self.grid_size < 1:
            raise DataError("grid_levels and grid_size must be positive")
        if not 0 <= self.max_failed_fraction < 1:
            raise DataError(
                f"max_failed_fraction must be in [0, 1), got {self.max_failed_fraction}"
            )
        if self.over_ratio is not None and not 0 < self.over_ratio <= 1:
            raise DataError(f"over_ratio must be in (0, 1], got {self.over_ratio}")
        if self.n_workers is not None and self.n_workers < 1:
            raise DataError(f"n_workers must be >= 1, got {self.n_workers}")
        return self


def default_worker_count() -> int:
    """All cores but one, keeping one for the coordinating process."""
    return max(1, (os.cpu_count() or 1) - 1)


def make_rng(seed: Union[int, np.random.Generator, None] = None) -> np.random.Generator:
    """Return ``seed`` if it already is a Generator, else a new seeded one."""
    if isinstance(seed, np.random.Generator):
        return seed
    return np.random.default_rng(seed)


def draw_seed(rng: np.random.Generator) -> int:
    """Draw an integer seed for libraries that take ``random_state: int``."""
    return int(rng.integers(0, 2**31 - 1))
