"""End-to-end tests for the workflow (samples with PyMC)."""

import arviz as az
import numpy as np
import pandas as pd
import pymc as pm
import pytest

from config.settings import CacheSettings, DiagnosticsSettings, SamplingSettings, Settings
from dbs_workflow.analysis.comparison import Verdict
from dbs_workflow.analysis.diagnostics import LooReport, ModelEvaluation
from dbs_workflow.analysis.fitting import ArtifactStatus, ConvergenceReport
from dbs_workflow.analysis.workflow import PRIOR_CHECK, VARIANTS, Workflow
from dbs_workflow.errors import ConvergenceFailure, UnreliableArtifactError
from dbs_workflow.models import Family
from dbs_workflow.visualization.figures import FigureGenerator


def make_wide(n_studies=8, seed=11):
    """Wide table in the layout of the DBS dataset."""
    rng = np.random.default_rng(seed)
    columns = {
        "study": [f"Trial {i}" for i in range(n_studies)],
        "mdur": rng.uniform(8, 16, n_studies),
        "mbase": rng.uniform(35, 55, n_studies),
    }
    baseline = rng.normal(-22, 3, n_studies)
    for j in range(1, 5):
        columns[f"y{j}i"] = baseline + 1.5 * j + rng.normal(0, 1.5, n_studies)
        columns[f"v{j}i"] = rng.uniform(3, 7, n_studies)
    wide = pd.DataFrame(columns)
    wide.loc[2, "y4i"] = np.nan
    return wide


def make_settings(escalation="", **overrides):
    return Settings(
        sampling=SamplingSettings(
            chains=2, draws=300, tune=500, cores=1, random_seed=5, escalation=escalation
        ),
        diagnostics=DiagnosticsSettings(rhat_tolerance=0.05, max_divergences=10),
        cache=CacheSettings(enabled=False),
        **overrides,
    )


def make_evaluation(name, reliable):
    pointwise = np.full(10, -2.0 if reliable else -2.5)
    status = ArtifactStatus.RELIABLE if reliable else ArtifactStatus.UNRELIABLE
    return ModelEvaluation(
        name=name,
        status=status,
        convergence=ConvergenceReport(max_rhat=1.0),
        summary=pd.DataFrame(),
        replicates=None,
        check=None,
        loo=LooReport(
            name=name,
            elpd=float(pointwise.sum()),
            se=1.0,
            p_loo=4.0,
            pointwise=pointwise,
            pareto_k=np.zeros(10),
            reliable=reliable,
        ),
    )


@pytest.fixture(scope="module")
def result():
    workflow = Workflow(make_settings(), allow_unreliable=True)
    return workflow.run(make_wide())


class TestWorkflowSetup:
    """Tests that need no sampling."""

    def test_specifications(self):
        """Test the three posterior variants."""
        specifications = Workflow(make_settings()).specifications()

        assert tuple(specifications) == VARIANTS
        assert specifications["gam_student"].family is Family.STUDENT_T

    def test_prepare(self):
        """Test loading and normalizing the wide table."""
        data, report = Workflow(make_settings()).prepare(make_wide())

        assert len(data) == 31
        assert report.n_missing_outcome == 1
        assert sorted(data["study_id"].unique()) == list(range(1, 9))

    def test_compare_refuses_unreliable(self):
        """Test that ranking stops at an unreliable fit unless overridden."""
        evaluations = {
            "linear": make_evaluation("linear", reliable=True),
            "gam_gaussian": make_evaluation("gam_gaussian", reliable=False),
        }

        with pytest.raises(UnreliableArtifactError):
            Workflow(make_settings()).compare(evaluations)

        ranked = Workflow(make_settings(), allow_unreliable=True).compare(evaluations)
        assert ranked.best.name == "linear"


class TestWorkflowRun:
    """Tests of a complete small run."""

    def test_artifact_names(self, result):
        """Test that every fit is stored under its own name."""
        assert result.artifacts.names() == [PRIOR_CHECK, *VARIANTS]
        assert result.artifacts.get(PRIOR_CHECK).prior_only
        assert [a.name for a in result.artifacts.posterior()] == list(VARIANTS)

    def test_shared_dataset(self, result):
        """Test that every variant was fitted to the same data."""
        hashes = {a.data_hash for a in result.artifacts}

        assert len(hashes) == 1
        assert all(a.n_observations == len(result.data) for a in result.artifacts)

    def test_evaluations(self, result):
        """Test the diagnostic bundle of each artifact."""
        prior = result.evaluations[PRIOR_CHECK]
        assert prior.loo is None
        assert prior.check.kind == "prior"

        for name in VARIANTS:
            evaluation = result.evaluations[name]
            assert evaluation.check.kind == "posterior"
            assert evaluation.loo.n_observations == 31
            assert len(evaluation.loo.pareto_k) == 31
            assert set(evaluation.sensitivity.table["parameter"]) >= {"Intercept", "sigma"}

    def test_comparison(self, result):
        """Test that the three posterior variants are ranked."""
        frame = result.comparison.to_frame()

        assert sorted(frame.index) == sorted(VARIANTS)
        assert result.comparison.best.verdict is Verdict.BEST
        assert (frame["se_diff"] >= 0).all()
        assert frame["weight"].sum() == pytest.approx(1.0, abs=1e-6)
        assert all(result.evaluations[name].loo.elpd_data is not None for name in VARIANTS)
        assert result.comparison_error is None

    def test_curves(self, result):
        """Test the prediction curves of the posterior variants."""
        assert set(result.curves) == set(VARIANTS)
        curve = result.curves["gam_gaussian"]
        assert len(curve.grid) == len(curve.mean)
        assert np.all(curve.lower <= curve.mean)
        assert np.all(curve.mean <= curve.upper)

    def test_figures(self, result, tmp_path):
        """Test that every figure is written."""
        saved = FigureGenerator(output_dir=str(tmp_path), save_formats=("png",)).generate_all(result)

        assert "overview" in saved
        assert "elpd_comparison" in saved
        for paths in saved.values():
            for path in paths:
                assert path.endswith(".png")


def student_t_crashes(**kwargs):
    """Sampler stand-in that fails for the Student-t model below target_accept 0.95."""
    if "nu" in pm.modelcontext(None).named_vars and kwargs["target_accept"] < 0.95:
        raise RuntimeError("bad initial energy")
    rng = np.random.default_rng(0)
    return az.from_dict(
        posterior={"Intercept": rng.normal(size=(2, 500))},
        sample_stats={"diverging": np.zeros((2, 500), dtype=bool)},
    )


@pytest.fixture
def crashing_sampler(monkeypatch):
    monkeypatch.setattr(pm, "sample", student_t_crashes)
    monkeypatch.setattr(pm, "compute_log_prior", lambda idata: idata)


class TestWorkflowRecovery:
    """Tests of variants whose sampler raises."""

    def test_failed_variant_is_resampled(self, crashing_sampler):
        """Test that the escalation schedule recovers a crashed variant."""
        workflow = Workflow(make_settings(escalation="0.95,0.99"), prior_check=False)
        data, _ = workflow.prepare(make_wide())

        store = workflow.fit(data)

        assert store.names() == list(VARIANTS)
        assert store.failures == {}
        assert store.get("gam_student").config.target_accept == 0.95
        assert store.get("linear").config.target_accept == 0.9

    def test_failed_variant_does_not_abort(self, crashing_sampler):
        """Test that the other variants survive when recovery is impossible."""
        workflow = Workflow(make_settings(), prior_check=False)
        data, _ = workflow.prepare(make_wide())

        with pytest.warns(UserWarning, match="No draws for 'gam_student'"):
            store = workflow.fit(data)

        assert store.names() == ["linear", "gam_gaussian"]
        assert list(store.failures) == ["gam_student"]
        assert isinstance(store.failures["gam_student"], ConvergenceFailure)
