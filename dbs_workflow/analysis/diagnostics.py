"""
Diagnostic Reporter.

Provides:
    - Predictive replicates (posterior predictive, or prior predictive for
      prior-only artifacts) as a separate InferenceData
    - Predictive checks of replicated vs observed test statistics
    - PSIS-LOO with Pareto k flags that name the affected observations
    - Power-scaling prior sensitivity per parameter
    - Posterior summaries

Nothing here modifies a FittedArtifact: every result is a new object.
"""

from dataclasses import dataclass, field
import logging
from typing import Callable, Dict, List, Optional
import warnings

import arviz as az
import numpy as np
from numpy.typing import NDArray
import pandas as pd
import pymc as pm
import xarray as xr

from config.settings import DiagnosticsSettings
from dbs_workflow.analysis.fitting import ArtifactStatus, ConvergenceReport, FittedArtifact

logger = logging.getLogger(__name__)


# Test statistics of the predictive check
TEST_STATISTICS: Dict[str, Callable[[NDArray[np.float64]], NDArray[np.float64]]] = {
    "mean": lambda y: np.mean(y, axis=-1),
    "sd": lambda y: np.std(y, axis=-1, ddof=1),
    "min": lambda y: np.min(y, axis=-1),
    "max": lambda y: np.max(y, axis=-1),
}

DIAGNOSIS_NONE = "-"
DIAGNOSIS_STRONG_PRIOR = "potential strong prior / weak likelihood"
DIAGNOSIS_CONFLICT = "potential prior-data conflict"


# ----------------------------------------------------------------------
# Predictive replicates
# ----------------------------------------------------------------------

def predictive_replicates(
    artifact: FittedArtifact,
    random_seed: Optional[int] = None
) -> az.InferenceData:
    """
    Replicated datasets for an artifact.

    Posterior artifacts are resampled through the fitted model; prior-only
    artifacts already carry their prior predictive draws. The artifact's
    own InferenceData is never extended.

    Returns:
        InferenceData with a ``posterior_predictive`` or ``prior_predictive``
        group (plus ``observed_data``)
    """
    if artifact.prior_only:
        groups = {"prior_predictive": artifact.idata.prior_predictive.copy()}
        if "observed_data" in artifact.idata.groups():
            groups["observed_data"] = artifact.idata.observed_data.copy()
        return az.InferenceData(**groups)

    seed = artifact.config.random_seed if random_seed is None else random_seed
    model = artifact.design.build_model(artifact.data)
    with model:
        return pm.sample_posterior_predictive(
            artifact.idata,
            random_seed=seed,
            progressbar=False,
            extend_inferencedata=False,
        )


def replicate_matrix(replicates: az.InferenceData, variable: str) -> NDArray[np.float64]:
    """Replicates as an array of shape (n_draws, n_observations)."""
    if "posterior_predictive" in replicates.groups():
        group = replicates.posterior_predictive
    elif "prior_predictive" in replicates.groups():
        group = replicates.prior_predictive
    else:
        raise ValueError("InferenceData holds no predictive group")
    values = group[variable].stack(sample=("chain", "draw"))
    return values.transpose("sample", ...).to_numpy()


@dataclass
class PredictiveCheck:
    """
    Replicated vs observed test statistics.

    ``table`` has one row per statistic with the observed value, the mean
    and 90% interval of its replicated distribution and the predictive
    p-value P(T(y_rep) >= T(y)).
    """
    kind: str
    table: pd.DataFrame
    n_replicates: int

    def extreme(self, alpha: float = 0.05) -> List[str]:
        """Statistics whose p-value lies outside [alpha, 1 - alpha]."""
        p = self.table["p_value"]
        return list(self.table.loc[(p < alpha) | (p > 1 - alpha), "statistic"])


def predictive_check(
    replicates: az.InferenceData,
    observed: NDArray[np.float64],
    variable: str = "effect"
) -> PredictiveCheck:
    """Compare replicated test statistics to the observed ones."""
    observed = np.asarray(observed, dtype=np.float64)
    y_rep = replicate_matrix(replicates, variable)
    if y_rep.shape[1] != observed.shape[0]:
        raise ValueError(
            f"Replicates have {y_rep.shape[1]} observations, observed data has {observed.shape[0]}"
        )

    kind = "posterior" if "posterior_predictive" in replicates.groups() else "prior"
    rows = []
    for name, statistic in TEST_STATISTICS.items():
        t_obs = float(statistic(observed))
        t_rep = statistic(y_rep)
        lower, upper = np.percentile(t_rep, [5, 95])
        rows.append({
            "statistic": name,
            "observed": t_obs,
            "replicated_mean": float(np.mean(t_rep)),
            "replicated_lower": float(lower),
            "replicated_upper": float(upper),
            "p_value": float(np.mean(t_rep >= t_obs)),
        })

    return PredictiveCheck(kind=kind, table=pd.DataFrame(rows), n_replicates=y_rep.shape[0])


# ----------------------------------------------------------------------
# Leave-one-out cross-validation
# ----------------------------------------------------------------------

@dataclass
class LooReport:
    """
    PSIS-LOO estimate of one artifact.

    Attributes:
        name: Artifact name
        elpd: Expected log pointwise predictive density
        se: Standard error of elpd
        p_loo: Effective number of parameters
        pointwise: Pointwise elpd contributions
        pareto_k: Pareto shape estimate per observation
        threshold: Pareto k threshold used for flagging
        flagged: Observations with k above threshold (row, study, study_id,
            time, pareto_k), highest k first
        reliable: Reliability status of the underlying artifact
        data_hash: Content hash of the dataset the fit used
        elpd_data: The ArviZ result the numbers came from (None when the
            report was built from stored numbers)
    """
    name: str
    elpd: float
    se: float
    p_loo: float
    pointwise: NDArray[np.float64] = field(repr=False)
    pareto_k: NDArray[np.float64] = field(repr=False)
    threshold: float = 0.7
    flagged: pd.DataFrame = field(default_factory=pd.DataFrame, repr=False)
    reliable: bool = True
    data_hash: str = ""
    elpd_data: Optional[az.ELPDData] = field(default=None, repr=False)

    @property
    def n_observations(self) -> int:
        return len(self.pointwise)

    @property
    def n_flagged(self) -> int:
        return len(self.flagged)

    @property
    def flagged_rows(self) -> List[int]:
        if self.flagged.empty:
            return []
        return [int(r) for r in self.flagged["row"]]

    def to_elpd_data(self) -> az.ELPDData:
        """The report as pointwise ArviZ ELPDData, as accepted by ``az.compare``."""
        if self.elpd_data is not None:
            return self.elpd_data
        dims = ["obs_id"]
        coords = {"obs_id": np.arange(self.n_observations)}
        return az.ELPDData(
            data=[
                self.elpd,
                self.se,
                self.p_loo,
                0,
                self.n_observations,
                False,
                xr.DataArray(self.pointwise, dims=dims, coords=coords, name="loo_i"),
                xr.DataArray(self.pareto_k, dims=dims, coords=coords),
                "log",
                self.threshold,
            ],
            index=[
                "elpd_loo", "se", "p_loo", "n_samples", "n_data_points",
                "warning", "loo_i", "pareto_k", "scale", "good_k",
            ],
        )

    def summary(self) -> str:
        text = f"{self.name}: elpd_loo = {self.elpd:.2f} (SE {self.se:.2f}), p_loo = {self.p_loo:.2f}"
        if self.n_flagged:
            text += f"; {self.n_flagged} observations with Pareto k > {self.threshold}"
        return text


def flag_observations(
    pareto_k: NDArray[np.float64],
    data: pd.DataFrame,
    threshold: float = 0.7
) -> pd.DataFrame:
    """
    Rows of ``data`` whose Pareto k exceeds ``threshold``.

    Raises:
        ValueError: If the data and the k estimates disagree in length
    """
    pareto_k = np.asarray(pareto_k, dtype=np.float64)
    if len(data) != len(pareto_k):
        raise ValueError(
            f"Dataset has {len(data)} rows but there are {len(pareto_k)} Pareto k estimates"
        )

    high = np.flatnonzero(pareto_k > threshold)
    columns = [c for c in ("study", "study_id", "time") if c in data.columns]
    flagged = data.iloc[high][columns].copy()
    flagged.insert(0, "row", high)
    flagged["pareto_k"] = pareto_k[high]
    return flagged.sort_values("pareto_k", ascending=False).reset_index(drop=True)


def loo_report(artifact: FittedArtifact, pareto_k_threshold: float = 0.7) -> LooReport:
    """
    PSIS-LOO for a posterior artifact.

    Raises:
        ValueError: For prior-only artifacts (no posterior to cross-validate)
    """
    if artifact.prior_only:
        raise ValueError(f"Artifact {artifact.name!r} holds prior draws only; LOO needs a posterior")

    outcome = artifact.specification.outcome
    with warnings.catch_warnings():
        # Pareto k problems are reported through the flagged table instead
        warnings.filterwarnings("ignore", message=".*Pareto.*")
        elpd = az.loo(artifact.idata, pointwise=True, var_name=outcome)

    pareto_k = np.asarray(elpd["pareto_k"]).astype(np.float64).ravel()
    flagged = flag_observations(pareto_k, artifact.data, pareto_k_threshold)
    if len(flagged):
        logger.warning(
            "%s: %d observations with Pareto k > %s (rows %s)",
            artifact.name, len(flagged), pareto_k_threshold, list(flagged["row"]),
        )

    return LooReport(
        name=artifact.name,
        elpd=float(elpd["elpd_loo"]),
        se=float(elpd["se"]),
        p_loo=float(elpd["p_loo"]),
        pointwise=np.asarray(elpd["loo_i"]).astype(np.float64).ravel(),
        pareto_k=pareto_k,
        threshold=pareto_k_threshold,
        flagged=flagged,
        reliable=artifact.reliable,
        data_hash=artifact.data_hash,
        elpd_data=elpd,
    )


# ----------------------------------------------------------------------
# Prior sensitivity
# ----------------------------------------------------------------------

def diagnose_sensitivity(prior: float, likelihood: float, threshold: float = 0.05) -> str:
    """Label a parameter from its prior and likelihood power-scaling sensitivity."""
    if prior >= threshold and likelihood >= threshold:
        return DIAGNOSIS_CONFLICT
    if prior >= threshold and likelihood < threshold:
        return DIAGNOSIS_STRONG_PRIOR
    return DIAGNOSIS_NONE


@dataclass
class SensitivityReport:
    """Power-scaling sensitivity per parameter."""
    name: str
    table: pd.DataFrame
    delta: float
    threshold: float

    def flagged(self) -> pd.DataFrame:
        return self.table[self.table["diagnosis"] != DIAGNOSIS_NONE]


def prior_sensitivity(
    artifact: FittedArtifact,
    delta: float = 0.01,
    threshold: float = 0.05
) -> SensitivityReport:
    """
    Power-scaling sensitivity of every prior-bearing parameter.

    Raises:
        ValueError: For prior-only artifacts or when log_prior /
            log_likelihood groups are missing
    """
    if artifact.prior_only:
        raise ValueError(f"Artifact {artifact.name!r} holds prior draws only")
    for group in ("log_prior", "log_likelihood"):
        if group not in artifact.idata.groups():
            raise ValueError(f"Artifact {artifact.name!r} lacks the {group} group")

    var_names = artifact.design.parameter_names()
    prior = az.psens(artifact.idata, component="prior", var_names=var_names, delta=delta)
    likelihood = az.psens(artifact.idata, component="likelihood", var_names=var_names, delta=delta)

    rows = []
    for name in var_names:
        p = float(np.max(np.abs(prior[name].to_numpy())))
        lik = float(np.max(np.abs(likelihood[name].to_numpy())))
        rows.append({
            "parameter": name,
            "prior": p,
            "likelihood": lik,
            "diagnosis": diagnose_sensitivity(p, lik, threshold),
        })

    return SensitivityReport(
        name=artifact.name,
        table=pd.DataFrame(rows),
        delta=delta,
        threshold=threshold,
    )


# ----------------------------------------------------------------------
# Summaries
# ----------------------------------------------------------------------

def posterior_summary(artifact: FittedArtifact, interval: float = 0.9) -> pd.DataFrame:
    """ArviZ summary of the prior-bearing parameters."""
    var_names = artifact.design.parameter_names()
    if artifact.prior_only:
        return az.summary(artifact.idata, group="prior", var_names=var_names,
                          kind="stats", hdi_prob=interval)
    return az.summary(artifact.idata, var_names=var_names, hdi_prob=interval)


@dataclass
class ModelEvaluation:
    """Everything the reporter computed for one artifact."""
    name: str
    status: ArtifactStatus
    convergence: ConvergenceReport
    summary: pd.DataFrame
    replicates: az.InferenceData = field(repr=False)
    check: PredictiveCheck = field(repr=False)
    loo: Optional[LooReport] = None
    sensitivity: Optional[SensitivityReport] = None


class DiagnosticReporter:
    """
    Compute the full diagnostic bundle for fitted artifacts.

    Example:
        >>> reporter = DiagnosticReporter(settings.diagnostics)
        >>> evaluation = reporter.evaluate(artifact)
        >>> evaluation.loo.n_flagged
        0
    """

    def __init__(self, settings: Optional[DiagnosticsSettings] = None):
        self.settings = settings or DiagnosticsSettings()

    def evaluate(self, artifact: FittedArtifact, random_seed: Optional[int] = None) -> ModelEvaluation:
        logger.info("Evaluating %s", artifact.name)
        replicates = predictive_replicates(artifact, random_seed)
        observed = artifact.data[artifact.specification.outcome].to_numpy(dtype=np.float64)
        check = predictive_check(replicates, observed, artifact.specification.outcome)

        loo = None
        sensitivity = None
        if not artifact.prior_only:
            loo = loo_report(artifact, self.settings.pareto_k_threshold)
            sensitivity = prior_sensitivity(
                artifact,
                delta=self.settings.sensitivity_delta,
                threshold=self.settings.sensitivity_threshold,
            )

        return ModelEvaluation(
            name=artifact.name,
            status=artifact.status,
            convergence=artifact.convergence,
            summary=posterior_summary(artifact, self.settings.interval),
            replicates=replicates,
            check=check,
            loo=loo,
            sensitivity=sensitivity,
        )
