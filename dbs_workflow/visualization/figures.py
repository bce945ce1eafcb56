"""
Publication Figure Generation.

Figures of the DBS meta-analysis:

1. Study trajectories (observed outcome by follow-up time)
2. Predictive check (replicated vs observed outcome density)
3. Prediction curves per model variant
4. Pareto k per observation
5. ELPD comparison with standard errors
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import arviz as az
import matplotlib.pyplot as plt
import numpy as np
from numpy.typing import NDArray
import pandas as pd
import xarray as xr

from dbs_workflow.analysis.comparison import ComparisonResult, Verdict
from dbs_workflow.analysis.diagnostics import LooReport
from dbs_workflow.analysis.prediction import PredictionCurve
from dbs_workflow.visualization.style import (
    NATURE_COLORS,
    PARETO_K_BANDS,
    add_panel_labels,
    create_figure_panel,
    get_color_for_variant,
    save_figure,
    set_publication_style,
)


def plot_study_trajectories(
    data: pd.DataFrame,
    ax: Optional[plt.Axes] = None,
    outcome: str = "effect",
    time_column: str = "time",
    group_column: str = "study_id"
) -> plt.Figure:
    """One line per study plus the occasion-wise mean."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 3.75))
    else:
        fig = ax.figure

    for _, study in data.groupby(group_column, sort=False):
        ax.plot(study[time_column], study[outcome], color=NATURE_COLORS["light_gray"],
                marker="o", linewidth=0.8, alpha=0.8)

    means = data.groupby(time_column)[outcome].mean()
    ax.plot(means.index, means.to_numpy(), color=NATURE_COLORS["dark_gray"],
            marker="s", linewidth=2, label="Mean")

    ax.set_xlabel("Follow-up occasion")
    ax.set_ylabel("UPDRS change")
    ax.legend(loc="best")
    return fig


def plot_predictive_check(
    replicates: az.InferenceData,
    observed: NDArray[np.float64],
    variable: str = "effect",
    n_replicates: int = 50,
    ax: Optional[plt.Axes] = None,
    seed: int = 0
) -> plt.Figure:
    """Densities of a sample of replicated datasets over the observed one (``az.plot_ppc``)."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 3.75))
    else:
        fig = ax.figure

    group = "posterior" if "posterior_predictive" in replicates.groups() else "prior"
    predictive = replicates[f"{group}_predictive"][[variable]]
    obs_dims = [d for d in predictive[variable].dims if d not in ("chain", "draw")]
    idata = az.InferenceData(**{
        f"{group}_predictive": predictive,
        "observed_data": xr.Dataset({variable: (obs_dims, np.asarray(observed, dtype=np.float64))}),
    })
    total = predictive.sizes["chain"] * predictive.sizes["draw"]

    az.plot_ppc(
        idata,
        kind="kde",
        group=group,
        var_names=[variable],
        observed=True,
        num_pp_samples=min(n_replicates, total),
        random_seed=seed,
        colors=[NATURE_COLORS["light_blue"], NATURE_COLORS["dark_gray"], NATURE_COLORS["blue"]],
        ax=ax,
    )
    ax.set_xlabel("UPDRS change")
    return fig


def plot_prediction_curves(
    curves: Dict[str, PredictionCurve],
    data: Optional[pd.DataFrame] = None,
    ax: Optional[plt.Axes] = None,
    time_column: str = "time",
    outcome: str = "effect"
) -> plt.Figure:
    """Expected outcome with central interval, one band per model."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 3.75))
    else:
        fig = ax.figure

    if data is not None:
        ax.scatter(data[time_column], data[outcome], color=NATURE_COLORS["gray"],
                   s=10, alpha=0.6, label="Observed")

    for name, curve in curves.items():
        color = get_color_for_variant(name)
        x = curve.grid[time_column].to_numpy()
        ax.plot(x, curve.mean, color=color, label=name)
        ax.fill_between(x, curve.lower, curve.upper, color=color, alpha=0.2, linewidth=0)

    ax.set_xlabel("Follow-up occasion")
    ax.set_ylabel("Expected UPDRS change")
    ax.legend(loc="best")
    return fig


def plot_pareto_k(report: LooReport, ax: Optional[plt.Axes] = None) -> plt.Figure:
    """Pareto k per observation with the usual reliability bands (``az.plot_khat``)."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 3))
    else:
        fig = ax.figure

    az.plot_khat(
        report.to_elpd_data(),
        color=NATURE_COLORS["blue"],
        show_hlines=True,
        threshold=report.threshold,
        hlines_kwargs={"hlines": list(PARETO_K_BANDS), "color": NATURE_COLORS["gray"]},
        ax=ax,
    )
    ax.set_xlabel("Observation")
    ax.set_ylabel("Pareto k")
    ax.set_title(report.name)
    return fig


def plot_elpd_comparison(result: ComparisonResult, ax: Optional[plt.Axes] = None) -> plt.Figure:
    """elpd_loo with SE (filled) and difference to the best model with its SE (open)."""
    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 0.6 * len(result.rows) + 1.2))
    else:
        fig = ax.figure

    positions = np.arange(len(result.rows))[::-1]
    for y, row in zip(positions, result.rows):
        color = get_color_for_variant(row.name)
        ax.errorbar(row.elpd, y, xerr=row.se, fmt="o", color=color, capsize=3)
        if row.rank > 1:
            marker = "^" if row.verdict is Verdict.INDISTINGUISHABLE else "v"
            ax.errorbar(result.best.elpd - row.elpd_diff, y - 0.2, xerr=row.se_diff,
                        fmt=marker, mfc="white", color=NATURE_COLORS["dark_gray"], capsize=3)

    ax.axvline(result.best.elpd, color=NATURE_COLORS["gray"], linestyle="--", linewidth=0.6)
    ax.set_yticks(positions)
    ax.set_yticklabels([r.name for r in result.rows])
    ax.set_xlabel("elpd_loo (higher is better)")
    return fig


class FigureGenerator:
    """
    Generate all figures of a workflow run.

    Example:
        >>> generator = FigureGenerator(output_dir="output/figures")
        >>> paths = generator.generate_all(result)
    """

    def __init__(self, output_dir: str = "figures", save_formats: Sequence[str] = ("pdf", "png")):
        self.output_dir = Path(output_dir)
        self.save_formats = tuple(save_formats)
        set_publication_style()

    def _save(self, fig: plt.Figure, name: str) -> List[str]:
        paths = save_figure(fig, str(self.output_dir / name), self.save_formats)
        plt.close(fig)
        return paths

    def generate_all(self, result: Any) -> Dict[str, List[str]]:
        """
        Save every figure for a WorkflowResult.

        Returns:
            Dictionary of figure name -> saved file paths
        """
        self.output_dir.mkdir(parents=True, exist_ok=True)
        figures = {}

        figures["trajectories"] = self._save(plot_study_trajectories(result.data), "trajectories")

        observed = result.data["effect"].to_numpy(dtype=np.float64)
        for name, evaluation in result.evaluations.items():
            fig = plot_predictive_check(evaluation.replicates, observed)
            fig.axes[0].set_title(f"{name} ({evaluation.check.kind} predictive)")
            figures[f"ppc_{name}"] = self._save(fig, f"ppc_{name}")

            if evaluation.loo is not None:
                figures[f"pareto_k_{name}"] = self._save(plot_pareto_k(evaluation.loo), f"pareto_k_{name}")

        if result.curves:
            figures["prediction_curves"] = self._save(
                plot_prediction_curves(result.curves, result.data), "prediction_curves"
            )

        if result.comparison is not None:
            figures["elpd_comparison"] = self._save(
                plot_elpd_comparison(result.comparison), "elpd_comparison"
            )

        figures["overview"] = self._save(self.overview(result), "overview")

        plt.close("all")
        return figures

    def overview(self, result: Any) -> plt.Figure:
        """Four-panel summary: trajectories, curves, comparison, Pareto k of the best model."""
        fig, axes = create_figure_panel(2, 2, figure_width=7.0, aspect_ratio=0.8)
        plot_study_trajectories(result.data, ax=axes[0, 0])

        if result.curves:
            plot_prediction_curves(result.curves, result.data, ax=axes[0, 1])
        else:
            axes[0, 1].set_axis_off()

        if result.comparison is not None:
            plot_elpd_comparison(result.comparison, ax=axes[1, 0])
            best = result.evaluations[result.comparison.best.name].loo
            plot_pareto_k(best, ax=axes[1, 1])
        else:
            axes[1, 0].set_axis_off()
            axes[1, 1].set_axis_off()

        add_panel_labels(axes)
        fig.tight_layout()
        return fig
