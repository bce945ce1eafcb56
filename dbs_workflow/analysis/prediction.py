"""
Prediction curves.

Population-level expected outcome over a synthetic covariate grid: time is
swept across a range while every other covariate is held at a fixed value
(the dataset mean unless given). Curves are computed from the stored draws
through the artifact's ModelDesign; nothing is resampled.
"""

from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
import pandas as pd

from dbs_workflow.analysis.fitting import FittedArtifact


def covariate_grid(
    data: pd.DataFrame,
    covariates: Tuple[str, ...] = ("mdur", "mbase"),
    time_range: Optional[Tuple[float, float]] = None,
    n_points: int = 50,
    fixed: Optional[Dict[str, float]] = None,
    time_column: str = "time"
) -> pd.DataFrame:
    """
    Grid of covariate values for prediction.

    Args:
        data: Working dataset (supplies ranges and means)
        covariates: Covariates held fixed along the curve
        time_range: (start, end); defaults to the observed range
        n_points: Grid resolution
        fixed: Values for covariates; missing ones use the dataset mean

    Returns:
        DataFrame with ``time_column`` and one column per covariate
    """
    if n_points < 2:
        raise ValueError("n_points must be at least 2")
    fixed = dict(fixed or {})
    unknown = [c for c in fixed if c not in covariates]
    if unknown:
        raise ValueError(f"Fixed values given for covariates not in the grid: {unknown}")

    if time_range is None:
        time = data[time_column].to_numpy(dtype=np.float64)
        time_range = (float(time.min()), float(time.max()))
    start, end = time_range
    if end <= start:
        raise ValueError(f"Empty time range: {time_range}")

    grid = pd.DataFrame({time_column: np.linspace(start, end, n_points)})
    for covariate in covariates:
        if covariate in fixed:
            grid[covariate] = float(fixed[covariate])
        else:
            grid[covariate] = float(data[covariate].mean())
    return grid


@dataclass
class PredictionCurve:
    """Mean and central interval of the expected outcome along a grid."""
    name: str
    grid: pd.DataFrame
    mean: np.ndarray = field(repr=False)
    lower: np.ndarray = field(repr=False)
    upper: np.ndarray = field(repr=False)
    interval: float = 0.9

    def to_frame(self) -> pd.DataFrame:
        frame = self.grid.copy()
        frame["mean"] = self.mean
        frame["lower"] = self.lower
        frame["upper"] = self.upper
        frame.insert(0, "model", self.name)
        return frame


def predict_curve(
    artifact: FittedArtifact,
    grid: pd.DataFrame,
    interval: float = 0.9
) -> PredictionCurve:
    """
    Expected outcome (without study effects) for every grid row.

    Prior-only artifacts yield the prior expectation.
    """
    if not 0.0 < interval < 1.0:
        raise ValueError("interval must be in (0, 1)")

    mu = artifact.design.expected_value(artifact.draws(), grid, include_group=False)
    tail = (1.0 - interval) / 2.0 * 100.0
    lower, upper = np.percentile(mu, [tail, 100.0 - tail], axis=0)

    return PredictionCurve(
        name=artifact.name,
        grid=grid.reset_index(drop=True).copy(),
        mean=mu.mean(axis=0),
        lower=lower,
        upper=upper,
        interval=interval,
    )
