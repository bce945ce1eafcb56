"""
Fitting Driver.

Provides:
    - Sampling configuration (posterior or prior-only)
    - Explicit convergence policy (R-hat tolerance, divergence count)
    - Fitted artifacts that carry their reliability status as data
    - Content-addressed caching of draws
    - Independent fitting of several variants, optionally in parallel

An artifact that fails the convergence policy is kept and marked
``unreliable``; it is never discarded and never silently refit. Resampling
requires an explicit configuration change (``refit``) or an explicit
escalation schedule (``fit_until_reliable``). A sampler that raises is
retried along the same schedule (``recover``).
"""

from concurrent.futures import ProcessPoolExecutor, as_completed
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple
import warnings

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm

from config.settings import DiagnosticsSettings, SamplingSettings
from dbs_workflow.analysis.cache import ArtifactCache, dataset_hash
from dbs_workflow.errors import ConvergenceFailure
from dbs_workflow.models.backend import ModelDesign
from dbs_workflow.models.specification import ModelSpecification

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SamplingConfig:
    """
    Sampler settings for one fit.

    Attributes:
        chains: Number of MCMC chains
        draws: Posterior draws per chain (prior draws in prior-only mode)
        tune: Tuning iterations per chain
        target_accept: NUTS target acceptance rate
        prior_only: Draw from the prior predictive instead of the posterior
        random_seed: Seed for reproducible draws
        cores: Parallel chains (None lets PyMC decide)
    """
    chains: int = 4
    draws: int = 1000
    tune: int = 1000
    target_accept: float = 0.9
    prior_only: bool = False
    random_seed: Optional[int] = 2024
    cores: Optional[int] = None

    def __post_init__(self):
        if self.chains < 1:
            raise ValueError("chains must be at least 1")
        if self.draws < 1:
            raise ValueError("draws must be at least 1")
        if self.tune < 0:
            raise ValueError("tune must be non-negative")
        if not 0.0 < self.target_accept < 1.0:
            raise ValueError("target_accept must be in (0, 1)")

    @classmethod
    def from_settings(cls, settings: SamplingSettings, prior_only: bool = False) -> "SamplingConfig":
        return cls(
            chains=settings.chains,
            draws=settings.draws,
            tune=settings.tune,
            target_accept=settings.target_accept,
            prior_only=prior_only,
            random_seed=settings.random_seed,
            cores=settings.cores,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def cache_dict(self) -> Dict[str, Any]:
        """Settings that change the draws (``cores`` does not)."""
        content = self.to_dict()
        content.pop("cores")
        return content


@dataclass
class ConvergenceReport:
    """
    Convergence diagnostics of one fit.

    Attributes:
        max_rhat: Largest R-hat over all parameters (NaN if unavailable)
        rhat_by_parameter: Largest R-hat per parameter
        n_divergences: Divergent transitions after tuning
        failing_parameters: Parameters whose R-hat is outside tolerance
        reasons: Why the fit is unreliable (empty when reliable)
    """
    max_rhat: float
    rhat_by_parameter: Dict[str, float] = field(default_factory=dict)
    n_divergences: int = 0
    failing_parameters: List[str] = field(default_factory=list)
    reasons: List[str] = field(default_factory=list)

    @property
    def reliable(self) -> bool:
        return not self.reasons

    @classmethod
    def for_prior_draws(cls) -> "ConvergenceReport":
        """Independent prior draws need no convergence check."""
        return cls(max_rhat=float("nan"))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_rhat": self.max_rhat,
            "rhat_by_parameter": dict(self.rhat_by_parameter),
            "n_divergences": self.n_divergences,
            "failing_parameters": list(self.failing_parameters),
            "reasons": list(self.reasons),
            "reliable": self.reliable,
        }

    def summary(self) -> str:
        if self.reliable:
            return f"reliable (max R-hat {self.max_rhat:.4f}, {self.n_divergences} divergences)"
        return "unreliable: " + "; ".join(self.reasons)


@dataclass(frozen=True)
class ReliabilityPolicy:
    """
    Thresholds deciding whether a posterior fit is usable.

    R-hat must not exceed ``1 + rhat_tolerance`` for any parameter and the
    number of divergent transitions must not exceed ``max_divergences``.
    """
    rhat_tolerance: float = 0.01
    max_divergences: int = 0

    def __post_init__(self):
        if self.rhat_tolerance <= 0:
            raise ValueError("rhat_tolerance must be positive")
        if self.max_divergences < 0:
            raise ValueError("max_divergences must be non-negative")

    @classmethod
    def from_settings(cls, settings: DiagnosticsSettings) -> "ReliabilityPolicy":
        return cls(
            rhat_tolerance=settings.rhat_tolerance,
            max_divergences=settings.max_divergences,
        )

    @property
    def max_rhat(self) -> float:
        return 1.0 + self.rhat_tolerance

    def evaluate(
        self,
        idata: az.InferenceData,
        var_names: Optional[Sequence[str]] = None
    ) -> ConvergenceReport:
        """Apply the policy to posterior draws."""
        reasons = []

        n_chains = idata.posterior.sizes["chain"]
        if n_chains < 2:
            reasons.append(f"R-hat needs at least 2 chains, got {n_chains}")
            rhat_by_parameter = {}
        else:
            rhat = az.rhat(idata, var_names=list(var_names) if var_names else None)
            rhat_by_parameter = {
                str(name): float(np.nanmax(values.to_numpy())) if values.size else float("nan")
                for name, values in rhat.data_vars.items()
            }

        failing = [
            name for name, value in rhat_by_parameter.items()
            if not np.isfinite(value) or value > self.max_rhat
        ]
        finite = [v for v in rhat_by_parameter.values() if np.isfinite(v)]
        max_rhat = max(finite) if finite else float("nan")
        if failing:
            reasons.append(
                f"R-hat above {self.max_rhat:.3f} for {len(failing)} parameters: {failing}"
            )

        n_divergences = 0
        if "sample_stats" in idata.groups() and "diverging" in idata.sample_stats:
            n_divergences = int(idata.sample_stats["diverging"].sum())
        if n_divergences > self.max_divergences:
            reasons.append(
                f"{n_divergences} divergent transitions (allowed {self.max_divergences})"
            )

        return ConvergenceReport(
            max_rhat=max_rhat,
            rhat_by_parameter=rhat_by_parameter,
            n_divergences=n_divergences,
            failing_parameters=failing,
            reasons=reasons,
        )


class ArtifactStatus(Enum):
    RELIABLE = "reliable"
    UNRELIABLE = "unreliable"


@dataclass(frozen=True, eq=False)
class FittedArtifact:
    """
    Immutable result of one fit.

    Attributes:
        name: Artifact name (unique within a workflow)
        specification: Specification that was fitted
        data: Private copy of the dataset the fit used
        data_hash: Content hash of ``data``
        config: Sampling configuration
        idata: Draws (posterior with log_likelihood and log_prior groups,
            or prior and prior_predictive groups in prior-only mode)
        design: Design matrices used by the model
        convergence: Convergence diagnostics
        status: Reliability status
        from_cache: True when the draws were loaded from the cache
    """
    name: str
    specification: ModelSpecification
    data: pd.DataFrame = field(repr=False)
    data_hash: str
    config: SamplingConfig
    idata: az.InferenceData = field(repr=False)
    design: ModelDesign = field(repr=False)
    convergence: ConvergenceReport
    status: ArtifactStatus
    from_cache: bool = False

    @property
    def reliable(self) -> bool:
        return self.status is ArtifactStatus.RELIABLE

    @property
    def prior_only(self) -> bool:
        return self.config.prior_only

    @property
    def n_observations(self) -> int:
        return len(self.data)

    def draws(self):
        """Parameter draws: the posterior, or the prior for prior-only artifacts."""
        return self.idata.prior if self.prior_only else self.idata.posterior

    def require_reliable(self) -> "FittedArtifact":
        """
        Return self if reliable.

        Raises:
            ConvergenceFailure: If the artifact is marked unreliable
        """
        if not self.reliable:
            raise ConvergenceFailure(
                f"Artifact {self.name!r} is unreliable: {self.convergence.summary()}",
                report=self.convergence,
            )
        return self


@dataclass(frozen=True)
class FitJob:
    """One named variant for ``FittingDriver.fit_many``."""
    name: str
    specification: ModelSpecification
    config: SamplingConfig


class FittingDriver:
    """
    Fit specifications to data.

    All behavior is fixed at construction; there is no global state.

    Example:
        >>> driver = FittingDriver(ReliabilityPolicy(rhat_tolerance=0.01))
        >>> artifact = driver.fit(spec, data, SamplingConfig(chains=4))
        >>> artifact.status
        <ArtifactStatus.RELIABLE: 'reliable'>
    """

    def __init__(
        self,
        policy: Optional[ReliabilityPolicy] = None,
        cache: Optional[ArtifactCache] = None
    ):
        self.policy = policy or ReliabilityPolicy()
        self.cache = cache

    def fit(
        self,
        specification: ModelSpecification,
        data: pd.DataFrame,
        config: SamplingConfig,
        name: Optional[str] = None
    ) -> FittedArtifact:
        """
        Fit one specification.

        The specification is checked against the data before any sampler
        call, so a schema problem never costs a sampling run.

        Args:
            specification: Validated model specification
            data: Normalized long dataset
            config: Sampling configuration
            name: Artifact name (defaults to the specification name)

        Returns:
            FittedArtifact (possibly marked unreliable)

        Raises:
            SchemaError: Data does not fit the specification
            ConvergenceFailure: The sampler raised
        """
        name = name or specification.name
        data = data.reset_index(drop=True).copy()
        design = ModelDesign.from_data(specification, data)
        data_hash = dataset_hash(data)
        fingerprint = specification.fingerprint()

        entry = None
        if self.cache is not None:
            entry = self.cache.load(fingerprint, data_hash, config.cache_dict())

        if entry is not None:
            logger.info("%s: using cached draws %s", name, entry.key[:12])
            idata = entry.idata
        else:
            model = design.build_model(data)
            idata = self._sample(name, model, config)
            if self.cache is not None:
                self.cache.save(
                    idata, fingerprint, data_hash, config.cache_dict(),
                    extra={"name": name, "formula": specification.formula},
                )

        return self._assemble(
            name, specification, data, data_hash, config, idata, design,
            from_cache=entry is not None,
        )

    def _sample(self, name: str, model: pm.Model, config: SamplingConfig) -> az.InferenceData:
        mode = "prior predictive" if config.prior_only else "posterior"
        logger.info(
            "%s: sampling %s (chains=%d, draws=%d, tune=%d, target_accept=%.3f)",
            name, mode, config.chains, config.draws, config.tune, config.target_accept,
        )
        with model:
            try:
                if config.prior_only:
                    return pm.sample_prior_predictive(
                        draws=config.draws,
                        random_seed=config.random_seed,
                    )
                idata = pm.sample(
                    draws=config.draws,
                    tune=config.tune,
                    chains=config.chains,
                    cores=config.cores,
                    target_accept=config.target_accept,
                    random_seed=config.random_seed,
                    progressbar=False,
                    idata_kwargs={"log_likelihood": True},
                )
                pm.compute_log_prior(idata)
                return idata
            except Exception as e:
                raise ConvergenceFailure(f"Sampler failed for {name!r}: {e}") from e

    def _assemble(
        self,
        name: str,
        specification: ModelSpecification,
        data: pd.DataFrame,
        data_hash: str,
        config: SamplingConfig,
        idata: az.InferenceData,
        design: ModelDesign,
        from_cache: bool = False
    ) -> FittedArtifact:
        if config.prior_only:
            convergence = ConvergenceReport.for_prior_draws()
        else:
            convergence = self.policy.evaluate(idata)

        status = ArtifactStatus.RELIABLE if convergence.reliable else ArtifactStatus.UNRELIABLE
        if status is ArtifactStatus.UNRELIABLE:
            message = f"Fit {name!r} marked unreliable: {convergence.summary()}"
            logger.warning(message)
            warnings.warn(message, UserWarning)
        else:
            logger.info("%s: %s", name, convergence.summary())

        return FittedArtifact(
            name=name,
            specification=specification,
            data=data,
            data_hash=data_hash,
            config=config,
            idata=idata,
            design=design,
            convergence=convergence,
            status=status,
            from_cache=from_cache,
        )

    def refit(
        self,
        artifact: FittedArtifact,
        name: Optional[str] = None,
        **changes: Any
    ) -> FittedArtifact:
        """
        Resample an artifact's specification with a changed configuration.

        Args:
            artifact: Previous fit
            name: Name of the new artifact (defaults to the old name)
            **changes: SamplingConfig fields to change

        Raises:
            ValueError: If the changes leave the configuration identical
        """
        config = replace(artifact.config, **changes)
        if config == artifact.config:
            raise ValueError(
                f"Refusing to refit {artifact.name!r} with an identical configuration; "
                f"change at least one of {list(asdict(config))}"
            )
        return self.fit(artifact.specification, artifact.data, config, name=name or artifact.name)

    def fit_until_reliable(
        self,
        specification: ModelSpecification,
        data: pd.DataFrame,
        config: SamplingConfig,
        target_accepts: Sequence[float],
        name: Optional[str] = None
    ) -> FittedArtifact:
        """
        Fit, then escalate ``target_accept`` through an explicit schedule.

        A sampler failure moves on to the next schedule entry as well.

        Returns:
            The first reliable artifact, or the last one tried

        Raises:
            ConvergenceFailure: The sampler failed at every schedule entry
        """
        try:
            artifact = self.fit(specification, data, config, name=name)
        except ConvergenceFailure as e:
            artifact = self.recover(specification, data, config, target_accepts, e, name=name)
        return self.escalate(artifact, target_accepts)

    def recover(
        self,
        specification: ModelSpecification,
        data: pd.DataFrame,
        config: SamplingConfig,
        target_accepts: Sequence[float],
        failure: ConvergenceFailure,
        name: Optional[str] = None
    ) -> FittedArtifact:
        """
        Resample after the sampler raised at ``config``.

        Each ``target_accept`` above the failed one is tried in turn.

        Raises:
            ConvergenceFailure: The last failure, once the schedule runs out
        """
        name = name or specification.name
        for target_accept in target_accepts:
            if target_accept <= config.target_accept:
                continue
            logger.warning("%s: %s; resampling with target_accept=%.3f", name, failure, target_accept)
            config = replace(config, target_accept=target_accept)
            try:
                return self.fit(specification, data, config, name=name)
            except ConvergenceFailure as e:
                failure = e
        raise failure

    def escalate(self, artifact: FittedArtifact, target_accepts: Sequence[float]) -> FittedArtifact:
        """Refit an unreliable artifact with each higher ``target_accept`` in turn."""
        for target_accept in target_accepts:
            if artifact.reliable:
                break
            if target_accept <= artifact.config.target_accept:
                continue
            logger.info("%s: resampling with target_accept=%.3f", artifact.name, target_accept)
            try:
                artifact = self.refit(artifact, target_accept=target_accept)
            except ConvergenceFailure as e:
                # Keep the unreliable draws we have and try the next entry
                logger.warning("%s: %s", artifact.name, e)
        return artifact

    def fit_all(
        self,
        jobs: Sequence[FitJob],
        data: pd.DataFrame,
        n_workers: int = 1
    ) -> Tuple[Dict[str, FittedArtifact], Dict[str, Exception]]:
        """
        Fit independent variants and collect per-job errors.

        Returns:
            (artifacts, errors), each keyed by job name in job order
        """
        names = [job.name for job in jobs]
        duplicated = sorted({n for n in names if names.count(n) > 1})
        if duplicated:
            raise ValueError(f"Job names must be unique: {duplicated}")

        results: Dict[str, FittedArtifact] = {}
        errors: Dict[str, Exception] = {}

        if n_workers > 1 and len(jobs) > 1:
            with ProcessPoolExecutor(max_workers=n_workers) as executor:
                futures = {executor.submit(_run_job, self, job, data): job for job in jobs}
                for future in as_completed(futures):
                    job = futures[future]
                    try:
                        results[job.name] = future.result()
                    except Exception as e:
                        errors[job.name] = e
        else:
            for job in jobs:
                try:
                    results[job.name] = _run_job(self, job, data)
                except Exception as e:
                    errors[job.name] = e

        return (
            {n: results[n] for n in names if n in results},
            {n: errors[n] for n in names if n in errors},
        )

    def fit_many(
        self,
        jobs: Sequence[FitJob],
        data: pd.DataFrame,
        n_workers: int = 1
    ) -> Dict[str, FittedArtifact]:
        """
        Fit independent variants.

        Returns only after every job has finished. If any job raised, the
        first error (in job order) is re-raised once all jobs are done.

        Returns:
            Dictionary of job name -> artifact, in job order
        """
        results, errors = self.fit_all(jobs, data, n_workers=n_workers)
        for error in errors.values():
            raise error
        return results


def _run_job(driver: FittingDriver, job: FitJob, data: pd.DataFrame) -> FittedArtifact:
    # Module level so ProcessPoolExecutor can pickle it
    return driver.fit(job.specification, data, job.config, name=job.name)
