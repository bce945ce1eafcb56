"""
Visualization Style Configuration.

Publication styling for the meta-analysis figures: a colorblind-friendly
palette, one fixed color per model variant, and multi-format saving.
"""

from pathlib import Path
from typing import List, Sequence, Tuple
import matplotlib.pyplot as plt
import numpy as np


# Colorblind-friendly palette
NATURE_COLORS = {
    "blue": "#3B7EA1",
    "red": "#C5203E",
    "green": "#228B22",
    "orange": "#E5811E",
    "purple": "#7B3294",
    "teal": "#008080",
    "light_blue": "#89CFF0",
    "gray": "#808080",
    "light_gray": "#C8C8C8",
    "dark_gray": "#404040",
}

# Model variant colors
VARIANT_COLORS = {
    "linear_prior": NATURE_COLORS["gray"],
    "linear": NATURE_COLORS["blue"],
    "gam_gaussian": NATURE_COLORS["green"],
    "gam_student": NATURE_COLORS["orange"],
}

# Pareto k bands (good / ok / bad / very bad)
PARETO_K_BANDS = (0.5, 0.7, 1.0)


def get_color_for_variant(name: str) -> str:
    """Color for a model variant, with fallback by keyword."""
    if name in VARIANT_COLORS:
        return VARIANT_COLORS[name]
    if "prior" in name:
        return NATURE_COLORS["gray"]
    if "student" in name:
        return NATURE_COLORS["orange"]
    if "gam" in name or "smooth" in name:
        return NATURE_COLORS["green"]
    return NATURE_COLORS["purple"]


def set_publication_style(font_size: int = 10, figure_width: float = 3.5) -> None:
    """
    Set matplotlib style for publication-quality figures.

    Args:
        font_size: Base font size in points
        figure_width: Figure width in inches (single column)
    """
    plt.rcdefaults()
    plt.rcParams.update({
        # Figure
        "figure.figsize": (figure_width, figure_width * 0.75),
        "figure.dpi": 150,
        "savefig.dpi": 300,
        "savefig.bbox": "tight",
        "savefig.pad_inches": 0.05,
        "figure.facecolor": "white",

        # Font
        "font.family": "sans-serif",
        "font.sans-serif": ["Arial", "Helvetica", "DejaVu Sans"],
        "font.size": font_size,
        "axes.labelsize": font_size,
        "axes.titlesize": font_size + 1,
        "xtick.labelsize": font_size - 1,
        "ytick.labelsize": font_size - 1,
        "legend.fontsize": font_size - 1,

        # Axes
        "axes.linewidth": 0.8,
        "axes.spines.top": False,
        "axes.spines.right": False,
        "axes.facecolor": "white",
        "axes.prop_cycle": plt.cycler(color=[
            NATURE_COLORS["blue"],
            NATURE_COLORS["red"],
            NATURE_COLORS["green"],
            NATURE_COLORS["orange"],
            NATURE_COLORS["purple"],
            NATURE_COLORS["teal"],
        ]),

        # Ticks
        "xtick.major.size": 3,
        "ytick.major.size": 3,
        "xtick.direction": "out",
        "ytick.direction": "out",

        # Lines
        "lines.linewidth": 1.2,
        "lines.markersize": 4,

        # Legend
        "legend.frameon": False,
    })


def create_figure_panel(
    n_rows: int = 1,
    n_cols: int = 1,
    figure_width: float = 7.0,
    aspect_ratio: float = 0.75,
    **kwargs
) -> Tuple[plt.Figure, np.ndarray]:
    """
    Multi-panel figure with consistent sizing.

    Returns:
        Tuple of (Figure, 2-D array of Axes)
    """
    fig_height = figure_width * aspect_ratio * n_rows / n_cols
    fig, axes = plt.subplots(
        n_rows, n_cols,
        figsize=(figure_width, fig_height),
        squeeze=False,
        **kwargs
    )
    return fig, axes


def add_panel_labels(axes: np.ndarray, fontsize: int = 12) -> None:
    """Label panels A, B, C, ..."""
    for i, ax in enumerate(axes.flatten()):
        ax.text(
            -0.1, 1.05, chr(65 + i),
            transform=ax.transAxes,
            fontsize=fontsize,
            fontweight="bold",
            va="bottom",
            ha="right"
        )


def save_figure(
    fig: plt.Figure,
    filename: str,
    formats: Sequence[str] = ("pdf", "png"),
    dpi: int = 300
) -> List[str]:
    """
    Save figure in multiple formats.

    Args:
        fig: Figure to save
        filename: Base filename (without extension)
        formats: Formats to save
        dpi: DPI for raster formats

    Returns:
        List of saved file paths
    """
    saved_files = []
    base_path = Path(filename)
    base_path.parent.mkdir(parents=True, exist_ok=True)

    for fmt in formats:
        filepath = base_path.with_suffix(f".{fmt}")
        fig.savefig(
            filepath,
            format=fmt,
            dpi=dpi if fmt in ["png", "jpg", "tiff"] else None,
            bbox_inches="tight",
            pad_inches=0.05,
            facecolor="white",
            edgecolor="none"
        )
        saved_files.append(str(filepath))

    return saved_files
