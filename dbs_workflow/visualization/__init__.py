"""
Visualization Module.

Figures:
    1. Study trajectories
    2. Predictive checks (prior and posterior)
    3. Prediction curves per model variant
    4. Pareto k diagnostics
    5. ELPD comparison

Style:
    - Clean, professional appearance
    - Colorblind-friendly palette, one color per model variant
    - High-resolution output (300 DPI)
"""

from dbs_workflow.visualization.figures import (
    FigureGenerator,
    plot_elpd_comparison,
    plot_pareto_k,
    plot_prediction_curves,
    plot_predictive_check,
    plot_study_trajectories,
)
from dbs_workflow.visualization.style import (
    NATURE_COLORS,
    VARIANT_COLORS,
    create_figure_panel,
    add_panel_labels,
    get_color_for_variant,
    save_figure,
    set_publication_style,
)

__all__ = [
    "FigureGenerator",
    "plot_elpd_comparison",
    "plot_pareto_k",
    "plot_prediction_curves",
    "plot_predictive_check",
    "plot_study_trajectories",
    "NATURE_COLORS",
    "VARIANT_COLORS",
    "create_figure_panel",
    "add_panel_labels",
    "get_color_for_variant",
    "save_figure",
    "set_publication_style",
]
