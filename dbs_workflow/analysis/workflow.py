"""
Workflow orchestration.

Runs the complete analysis in a fixed order, giving every fit its own name:

    1. Load and normalize the wide table
    2. linear_prior   prior predictive check of the linear model
    3. linear, gam_gaussian, gam_student   posterior fits
    4. Diagnostics for every artifact
    5. ELPD comparison of the posterior fits
    6. Prediction curves

Artifacts are collected in an ArtifactStore that refuses to overwrite a
name, so a later step can never silently replace an earlier fit.
"""

from dataclasses import dataclass, field, replace
import logging
from typing import Dict, Iterator, List, Optional, Sequence, Tuple
import warnings

import pandas as pd

from config.settings import Settings
from dbs_workflow.analysis.cache import ArtifactCache
from dbs_workflow.analysis.comparison import ComparisonResult, compare_models
from dbs_workflow.analysis.diagnostics import DiagnosticReporter, ModelEvaluation
from dbs_workflow.analysis.fitting import (
    FitJob,
    FittedArtifact,
    FittingDriver,
    ReliabilityPolicy,
    SamplingConfig,
)
from dbs_workflow.analysis.prediction import PredictionCurve, covariate_grid, predict_curve
from dbs_workflow.analysis.preprocessing import NormalizationReport, StudyNormalizer, prepare_dataset
from dbs_workflow.data.loader import WideLayout
from dbs_workflow.errors import ConvergenceFailure, UnreliableArtifactError
from dbs_workflow.models.priors import PriorSet
from dbs_workflow.models.specification import ModelSpecification, SpecificationRegistry

logger = logging.getLogger(__name__)

VARIANTS = ("linear", "gam_gaussian", "gam_student")
PRIOR_CHECK = "linear_prior"


class ArtifactStore:
    """
    Named fitted artifacts; a name can be stored only once.

    Variants whose sampler failed at every configuration tried are kept
    in ``failures`` instead.
    """

    def __init__(self):
        self._artifacts: Dict[str, FittedArtifact] = {}
        self.failures: Dict[str, ConvergenceFailure] = {}

    def add(self, artifact: FittedArtifact) -> None:
        if artifact.name in self._artifacts:
            raise ValueError(f"An artifact named {artifact.name!r} already exists")
        self._artifacts[artifact.name] = artifact

    def record_failure(self, name: str, error: ConvergenceFailure) -> None:
        if name in self._artifacts or name in self.failures:
            raise ValueError(f"An artifact named {name!r} already exists")
        message = f"No draws for {name!r}: {error}"
        logger.warning(message)
        warnings.warn(message, UserWarning)
        self.failures[name] = error

    def get(self, name: str) -> FittedArtifact:
        if name not in self._artifacts:
            raise KeyError(f"No artifact named {name!r}. Available: {self.names()}")
        return self._artifacts[name]

    def names(self) -> List[str]:
        return list(self._artifacts)

    def posterior(self) -> List[FittedArtifact]:
        return [a for a in self._artifacts.values() if not a.prior_only]

    def __contains__(self, name: str) -> bool:
        return name in self._artifacts

    def __iter__(self) -> Iterator[FittedArtifact]:
        return iter(self._artifacts.values())

    def __len__(self) -> int:
        return len(self._artifacts)


@dataclass
class WorkflowResult:
    """
    Output of a workflow run.

    Attributes:
        data: Normalized long dataset
        report: What the normalizer removed
        artifacts: Every fit, by name
        evaluations: Diagnostics per artifact
        comparison: ELPD ranking (None if it was refused)
        comparison_error: Why the ranking was refused
        curves: Prediction curves per posterior artifact
    """
    data: pd.DataFrame
    report: NormalizationReport
    artifacts: ArtifactStore
    evaluations: Dict[str, ModelEvaluation] = field(default_factory=dict)
    comparison: Optional[ComparisonResult] = None
    comparison_error: Optional[str] = None
    curves: Dict[str, PredictionCurve] = field(default_factory=dict)


class Workflow:
    """
    The full DBS meta-analysis.

    Example:
        >>> workflow = Workflow(get_settings())
        >>> result = workflow.run(read_wide_table("dat_ishak2007.csv"))
        >>> print(result.comparison.summary())
    """

    def __init__(
        self,
        settings: Settings,
        priors: Optional[PriorSet] = None,
        variants: Sequence[str] = VARIANTS,
        layout: Optional[WideLayout] = None,
        allow_unreliable: bool = False,
        prior_check: bool = True
    ):
        self.settings = settings
        self.priors = priors
        self.variants = tuple(variants)
        self.layout = layout or WideLayout.ishak(study_column=settings.data.study_column)
        self.allow_unreliable = allow_unreliable
        self.prior_check = prior_check

        self.sampling = SamplingConfig.from_settings(settings.sampling)
        cache = ArtifactCache(settings.cache.directory) if settings.cache.enabled else None
        self.driver = FittingDriver(ReliabilityPolicy.from_settings(settings.diagnostics), cache)
        self.reporter = DiagnosticReporter(settings.diagnostics)

    def specifications(self) -> Dict[str, ModelSpecification]:
        kwargs = {"priors": self.priors} if self.priors is not None else {}
        return {name: SpecificationRegistry.get(name, **kwargs) for name in self.variants}

    def prepare(self, frame: pd.DataFrame) -> Tuple[pd.DataFrame, NormalizationReport]:
        return prepare_dataset(frame, self.layout, StudyNormalizer())

    def fit(self, data: pd.DataFrame) -> ArtifactStore:
        """
        Prior check plus every posterior variant, escalating unreliable fits.

        A variant whose sampler raises is resampled along the escalation
        schedule; if every entry fails it is recorded in
        ``ArtifactStore.failures`` and the other variants are kept.

        Raises:
            SchemaError: The data does not fit a variant
        """
        specifications = self.specifications()
        store = ArtifactStore()

        if self.prior_check and "linear" in specifications:
            prior_config = replace(self.sampling, prior_only=True)
            store.add(self.driver.fit(specifications["linear"], data, prior_config, name=PRIOR_CHECK))

        jobs = [FitJob(name, spec, self.sampling) for name, spec in specifications.items()]
        fitted, errors = self.driver.fit_all(jobs, data, n_workers=self.settings.n_workers)
        for error in errors.values():
            if not isinstance(error, ConvergenceFailure):
                raise error

        schedule = self.settings.sampling.escalation_list
        for job in jobs:
            if job.name in errors:
                try:
                    artifact = self.driver.recover(
                        job.specification, data, job.config, schedule, errors[job.name], name=job.name
                    )
                except ConvergenceFailure as e:
                    store.record_failure(job.name, e)
                    continue
            else:
                artifact = fitted[job.name]
            if not artifact.reliable and schedule:
                artifact = self.driver.escalate(artifact, schedule)
            store.add(artifact)
        return store

    def compare(self, evaluations: Dict[str, ModelEvaluation]) -> ComparisonResult:
        reports = [e.loo for e in evaluations.values() if e.loo is not None]
        return compare_models(reports, allow_unreliable=self.allow_unreliable)

    def run(self, frame: pd.DataFrame) -> WorkflowResult:
        """
        Run every step on a wide table.

        Raises:
            SchemaError: The table does not fit the layout or the models
            SpecificationError: A variant is inconsistent
        """
        data, report = self.prepare(frame)
        logger.info(
            "Prepared %d observations from %d studies (%d rows removed)",
            report.n_final, report.n_studies_final, report.n_missing_outcome,
        )

        store = self.fit(data)
        result = WorkflowResult(data=data, report=report, artifacts=store)

        for artifact in store:
            result.evaluations[artifact.name] = self.reporter.evaluate(artifact)

        try:
            result.comparison = self.compare(result.evaluations)
        except UnreliableArtifactError as e:
            result.comparison_error = str(e)
            warnings.warn(f"Model ranking skipped: {e}", UserWarning)

        grid = covariate_grid(data)
        for artifact in store.posterior():
            result.curves[artifact.name] = predict_curve(
                artifact, grid, interval=self.settings.diagnostics.interval
            )

        return result
