"""
Bayesian meta-analysis of deep-brain stimulation outcomes in Parkinson's disease.

Each study reports the mean change in UPDRS motor score at up to four
follow-up occasions. The package reshapes the study table, fits a
hierarchical linear model and two penalized-spline (GAM) variants with
PyMC, checks them and ranks them by leave-one-out predictive accuracy.

Core Components:
    - data: Wide-to-long loading of the study table
    - models: Terms, priors, specifications and the PyMC backend
    - analysis: Normalization, fitting, diagnostics, comparison, prediction
    - visualization: Publication-quality figures

Model:
    effect_ij = Intercept + f(time_ij) + b_mdur * mdur_i + b_mbase * mbase_i
                + u_i + e_ij,     u_i ~ Normal(0, sd_study)

    with f linear, or a penalized smooth; e_ij Normal or Student-t.

Version: 1.0.0
License: MIT
"""

__version__ = "1.0.0"
__license__ = "MIT"

from dbs_workflow.errors import (
    ConvergenceFailure,
    SchemaError,
    SpecificationError,
    UnreliableArtifactError,
    WorkflowError,
)

__all__ = [
    "ConvergenceFailure",
    "SchemaError",
    "SpecificationError",
    "UnreliableArtifactError",
    "WorkflowError",
]
