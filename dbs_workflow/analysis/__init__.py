"""
Analysis Pipeline Module.

Pipeline Components:

1. Preprocessing (preprocessing.py)
   - Drop rows with missing outcome
   - Dense study ids AFTER filtering
   - Transparency report of every exclusion

2. Fitting (fitting.py, cache.py)
   - Posterior or prior-only sampling with PyMC
   - Explicit R-hat / divergence policy; unreliable fits are kept and marked
   - Content-addressed cache of draws
   - Parallel fitting of independent variants

3. Diagnostics (diagnostics.py)
   - Predictive replicates and checks
   - PSIS-LOO with Pareto k flags naming the observations
   - Power-scaling prior sensitivity

4. Comparison (comparison.py)
   - ELPD ranking with standard errors of the differences
   - Differences within one SE are "indistinguishable"

5. Prediction (prediction.py)
   - Expected outcome over a covariate grid

6. Workflow (workflow.py)
   - The full sequence with distinct named artifacts
"""

from dbs_workflow.analysis.preprocessing import (
    NormalizationReport,
    StudyNormalizer,
    prepare_dataset,
)
from dbs_workflow.analysis.cache import ArtifactCache, cache_key, dataset_hash
from dbs_workflow.analysis.fitting import (
    ArtifactStatus,
    ConvergenceReport,
    FitJob,
    FittedArtifact,
    FittingDriver,
    ReliabilityPolicy,
    SamplingConfig,
)
from dbs_workflow.analysis.diagnostics import (
    DiagnosticReporter,
    LooReport,
    ModelEvaluation,
    PredictiveCheck,
    SensitivityReport,
    flag_observations,
    loo_report,
    posterior_summary,
    predictive_check,
    predictive_replicates,
    prior_sensitivity,
)
from dbs_workflow.analysis.comparison import (
    ComparisonResult,
    ComparisonRow,
    Verdict,
    compare_models,
    pairwise_order,
)
from dbs_workflow.analysis.prediction import PredictionCurve, covariate_grid, predict_curve
from dbs_workflow.analysis.workflow import ArtifactStore, Workflow, WorkflowResult

__all__ = [
    # Preprocessing
    "NormalizationReport",
    "StudyNormalizer",
    "prepare_dataset",

    # Fitting
    "ArtifactCache",
    "cache_key",
    "dataset_hash",
    "ArtifactStatus",
    "ConvergenceReport",
    "FitJob",
    "FittedArtifact",
    "FittingDriver",
    "ReliabilityPolicy",
    "SamplingConfig",

    # Diagnostics
    "DiagnosticReporter",
    "LooReport",
    "ModelEvaluation",
    "PredictiveCheck",
    "SensitivityReport",
    "flag_observations",
    "loo_report",
    "posterior_summary",
    "predictive_check",
    "predictive_replicates",
    "prior_sensitivity",

    # Comparison
    "ComparisonResult",
    "ComparisonRow",
    "Verdict",
    "compare_models",
    "pairwise_order",

    # Prediction
    "PredictionCurve",
    "covariate_grid",
    "predict_curve",

    # Workflow
    "ArtifactStore",
    "Workflow",
    "WorkflowResult",
]
