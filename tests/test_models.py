"""Tests for priors, terms, specifications and the PyMC backend."""

import pickle

import numpy as np
import pandas as pd
import pytest
import xarray as xr

from dbs_workflow.errors import SchemaError, SpecificationError
from dbs_workflow.models import (
    DEFAULT_PRIORS,
    CoefficientClass,
    Family,
    GroupIntercept,
    LinearTerm,
    ModelDesign,
    Prior,
    PriorSet,
    SmoothBasis,
    SmoothTerm,
    SpecificationRegistry,
    build_specification,
    gam_gaussian_specification,
    gam_student_specification,
    linear_specification,
    variable_name,
)


def make_data(n_studies=6, seed=1):
    """Normalized long table: n_studies studies with four occasions each."""
    rng = np.random.default_rng(seed)
    mdur = rng.uniform(8, 16, n_studies)
    mbase = rng.uniform(35, 55, n_studies)
    time = np.tile([1.0, 2.0, 3.0, 4.0], n_studies)
    study_id = np.repeat(np.arange(1, n_studies + 1), 4)
    effect = (
        -25 + 2 * time + 0.5 * (np.repeat(mdur, 4) - 12)
        + rng.normal(0, 2, len(time))
    )
    return pd.DataFrame({
        "study": [f"Study {i}" for i in study_id],
        "occasion": np.tile([1, 2, 3, 4], n_studies),
        "time": time,
        "effect": effect,
        "variance": rng.uniform(3, 7, len(time)),
        "mdur": np.repeat(mdur, 4),
        "mbase": np.repeat(mbase, 4),
        "study_id": study_id,
    })


class TestPrior:
    """Tests for prior declarations."""

    def test_valid_prior(self):
        """Test construction and parameter access."""
        prior = Prior("Normal", mu=0, sigma=5)

        assert prior.family == "Normal"
        assert prior.params == {"mu": 0.0, "sigma": 5.0}
        assert not prior.positive_support

    def test_unknown_family(self):
        """Test that unknown families are rejected."""
        with pytest.raises(SpecificationError):
            Prior("Banana", mu=0)

    def test_missing_parameter(self):
        """Test that every family parameter is required."""
        with pytest.raises(SpecificationError):
            Prior("Normal", mu=0)

    def test_non_positive_scale(self):
        """Test that scale parameters must be positive."""
        with pytest.raises(SpecificationError):
            Prior("HalfNormal", sigma=0)

    def test_immutable_and_hashable(self):
        """Test equality, hashing and pickling."""
        a = Prior("Gamma", alpha=2, beta=0.1)
        b = Prior("Gamma", alpha=2.0, beta=0.1)

        assert a == b
        assert len({a, b}) == 1
        assert pickle.loads(pickle.dumps(a)) == a
        with pytest.raises(AttributeError):
            a.family = "Normal"


class TestPriorSet:
    """Tests for prior resolution."""

    def test_override_before_default(self):
        """Test that overrides win over class defaults."""
        priors = PriorSet(
            defaults={"b": Prior("Normal", mu=0, sigma=5)},
            overrides={("b", "mdur"): Prior("Normal", mu=0, sigma=2)},
        )

        assert priors.resolve("b", "mdur") == Prior("Normal", mu=0, sigma=2)
        assert priors.resolve("b", "mbase") == Prior("Normal", mu=0, sigma=5)

    def test_no_default(self):
        """Test that a coefficient without any prior is an error."""
        priors = PriorSet(defaults={"b": Prior("Normal", mu=0, sigma=5)})

        with pytest.raises(SpecificationError, match="sigma"):
            priors.resolve(CoefficientClass.SIGMA, "sigma")

    def test_scale_class_needs_positive_support(self):
        """Test that scale classes reject priors on the whole real line."""
        with pytest.raises(SpecificationError):
            PriorSet(defaults={"sd": Prior("Normal", mu=0, sigma=1)})

    def test_unknown_class(self):
        """Test that coefficient classes are checked."""
        with pytest.raises(SpecificationError):
            PriorSet(defaults={"slope": Prior("Normal", mu=0, sigma=1)})

    def test_with_override_returns_new_set(self):
        """Test that PriorSet is never modified in place."""
        updated = DEFAULT_PRIORS.with_override("b", "time", Prior("Normal", mu=0, sigma=1))

        assert updated != DEFAULT_PRIORS
        assert (CoefficientClass.B, "time") not in DEFAULT_PRIORS.overrides


class TestSpecification:
    """Tests for building and validating specifications."""

    def test_linear(self):
        """Test the linear variant."""
        spec = linear_specification()

        assert spec.formula == "effect ~ time + mdur + mbase + (1 | study_id)"
        assert spec.coefficients() == [
            (CoefficientClass.INTERCEPT, "Intercept"),
            (CoefficientClass.B, "time"),
            (CoefficientClass.B, "mdur"),
            (CoefficientClass.B, "mbase"),
            (CoefficientClass.SD, "study_id"),
            (CoefficientClass.SIGMA, "sigma"),
        ]

    def test_gam_variants_share_terms_and_priors(self):
        """Test that the robust GAM differs only in its noise family."""
        gaussian = gam_gaussian_specification()
        student = gam_student_specification()

        assert student.terms == gaussian.terms
        assert student.priors == gaussian.priors
        assert gaussian.family is Family.GAUSSIAN
        assert student.family is Family.STUDENT_T
        assert student.coefficients() == gaussian.coefficients() + [(CoefficientClass.NU, "nu")]
        assert student.fingerprint() != gaussian.fingerprint()

    def test_smooth_coefficients(self):
        """Test the coefficients contributed by a smooth term."""
        spec = gam_gaussian_specification()

        assert (CoefficientClass.B, "stime") in spec.coefficients()
        assert (CoefficientClass.SDS, "stime") in spec.coefficients()
        assert "s(time, k=3)" in spec.formula

    def test_override_for_absent_coefficient(self):
        """Test that a prior on a coefficient not in the formula is rejected."""
        priors = DEFAULT_PRIORS.with_override("b", "time_squared", Prior("Normal", mu=0, sigma=1))

        with pytest.raises(SpecificationError, match="time_squared") as info:
            linear_specification(priors=priors)
        assert "mdur" in str(info.value)

    def test_smooth_basis_too_small(self):
        """Test that a smooth needs k >= 3."""
        with pytest.raises(SpecificationError):
            build_specification("tiny", (SmoothTerm("time", k=2),), DEFAULT_PRIORS)

    def test_two_group_terms(self):
        """Test that only one group intercept is supported."""
        terms = (LinearTerm("time"), GroupIntercept("study_id"), GroupIntercept("occasion"))

        with pytest.raises(SpecificationError):
            build_specification("nested", terms, DEFAULT_PRIORS)

    def test_repeated_column(self):
        """Test that a column cannot appear in two terms."""
        terms = (LinearTerm("time"), SmoothTerm("time", k=3))

        with pytest.raises(SpecificationError):
            build_specification("both", terms, DEFAULT_PRIORS)

    def test_missing_prior_class(self):
        """Test that every coefficient class needs a prior."""
        priors = PriorSet(defaults={
            "Intercept": Prior("Normal", mu=0, sigma=10),
            "b": Prior("Normal", mu=0, sigma=5),
            "sigma": Prior("HalfNormal", sigma=5),
        })

        with pytest.raises(SpecificationError, match="study_id"):
            linear_specification(priors=priors)

    def test_fingerprint_ignores_name(self):
        """Test that the name does not change the model identity."""
        assert (
            linear_specification(name="other").fingerprint()
            == linear_specification().fingerprint()
        )

    def test_fingerprint_tracks_priors(self):
        """Test that a changed prior changes the fingerprint."""
        priors = DEFAULT_PRIORS.with_default("sigma", Prior("HalfNormal", sigma=2))

        assert (
            linear_specification(priors=priors).fingerprint()
            != linear_specification().fingerprint()
        )

    def test_prior_table(self):
        """Test that the prior table records where each prior came from."""
        table = linear_specification().prior_table().set_index("coefficient")

        assert table.loc["mdur", "source"] == "override"
        assert table.loc["time", "source"] == "default"

    def test_validate_data(self):
        """Test that a complete dataset passes validation."""
        linear_specification().validate_data(make_data())

    def test_validate_missing_covariate(self):
        """Test that a missing covariate is a schema error."""
        data = make_data().drop(columns=["mdur"])

        with pytest.raises(SchemaError, match="mdur"):
            linear_specification().validate_data(data)

    def test_validate_too_few_distinct_values(self):
        """Test that a smooth needs k distinct values of its column."""
        spec = gam_gaussian_specification(k=5)

        with pytest.raises(SchemaError, match="distinct"):
            spec.validate_data(make_data())

    def test_validate_negative_variance(self):
        """Test that known sampling variances must be non-negative."""
        data = make_data()
        data.loc[0, "variance"] = -1.0

        with pytest.raises(SchemaError):
            linear_specification(known_variance=True).validate_data(data)


class TestRegistry:
    """Tests for the specification registry."""

    def test_registered_variants(self):
        """Test that the three variants are registered."""
        names = SpecificationRegistry.list_specifications()

        assert {"linear", "gam_gaussian", "gam_student"} <= set(names)

    def test_get_with_arguments(self):
        """Test building a variant by name."""
        spec = SpecificationRegistry.get("gam_gaussian", name="gam_k4", k=4)

        assert spec.name == "gam_k4"
        assert spec.smooth_terms[0].k == 4

    def test_unknown_variant(self):
        """Test that unknown names are rejected."""
        with pytest.raises(ValueError, match="Unknown specification"):
            SpecificationRegistry.get("quadratic")


class TestSmoothBasis:
    """Tests for the penalized spline basis."""

    def test_column_count(self):
        """Test that a basis of dimension k has k - 2 penalized columns."""
        x = np.linspace(0, 10, 40)

        assert SmoothBasis.fit(x, 3).n_columns == 1
        assert SmoothBasis.fit(x, 5).n_columns == 3

    def test_orthogonal_to_linear_part(self):
        """Test that the penalized columns carry no constant or linear trend."""
        x = np.tile([1.0, 2.0, 3.0, 4.0], 6)
        basis = SmoothBasis.fit(x, 4)
        columns = basis.transform(x)

        assert columns.shape == (24, 2)
        np.testing.assert_allclose(columns.sum(axis=0), 0.0, atol=1e-8)
        np.testing.assert_allclose((x - basis.center) @ columns, 0.0, atol=1e-8)
        np.testing.assert_allclose(columns.std(axis=0), 1.0)

    def test_too_few_values(self):
        """Test that k distinct values are required."""
        with pytest.raises(SchemaError):
            SmoothBasis.fit(np.array([1.0, 2.0, 1.0, 2.0]), 3)

    def test_out_of_range_values(self):
        """Test that new values outside the training range stay finite."""
        basis = SmoothBasis.fit(np.linspace(1, 4, 20), 3)

        assert np.all(np.isfinite(basis.transform(np.array([0.0, 5.0]))))


class TestModelDesign:
    """Tests for design construction and the PyMC model."""

    def test_parameter_names(self):
        """Test random variable names of the robust GAM."""
        design = ModelDesign.from_data(gam_student_specification(), make_data())

        assert design.parameter_names() == [
            "Intercept", "b_stime", "sds_stime", "b_mdur", "b_mbase",
            "sd_study_id", "sigma", "nu",
        ]
        assert variable_name(CoefficientClass.B, "mdur") == "b_mdur"

    def test_from_data_validates(self):
        """Test that the design refuses a dataset that does not fit."""
        with pytest.raises(SchemaError):
            ModelDesign.from_data(linear_specification(), make_data().drop(columns=["mbase"]))

    def test_build_model(self):
        """Test the variables and coordinates of the PyMC model."""
        data = make_data()
        design = ModelDesign.from_data(gam_gaussian_specification(), data)
        model = design.build_model(data)

        for name in ("Intercept", "b_stime", "sds_stime", "zs_stime", "sd_study_id", "effect"):
            assert name in model.named_vars
        assert "nu" not in model.named_vars
        assert len(model.coords["study_id"]) == 6
        assert len(model.coords["obs_id"]) == len(data)

    def test_build_student_model(self):
        """Test that the Student-t variant adds nu."""
        data = make_data()
        model = ModelDesign.from_data(gam_student_specification(), data).build_model(data)

        assert "nu" in model.named_vars

    def test_initial_logp_finite(self):
        """Test that the model has a finite log density at its initial point."""
        data = make_data()
        model = ModelDesign.from_data(linear_specification(), data).build_model(data)

        assert np.isfinite(model.compile_logp()(model.initial_point()))

    def test_expected_value_linear(self):
        """Test the linear predictor against a hand computation."""
        data = make_data()
        design = ModelDesign.from_data(linear_specification(), data)

        def draws(*values):
            return xr.DataArray(np.array([values]), dims=("chain", "draw"))

        posterior = xr.Dataset({
            "Intercept": draws(-20.0, -10.0),
            "b_time": draws(1.0, 2.0),
            "b_mdur": draws(0.5, 0.0),
            "b_mbase": draws(0.0, 0.1),
        })
        grid = pd.DataFrame({"time": [1.0, 4.0], "mdur": [12.0, 12.0], "mbase": [45.0, 45.0]})

        mu = design.expected_value(posterior, grid)

        t = grid["time"].to_numpy() - design.centers["time"]
        d = 12.0 - design.centers["mdur"]
        b = 45.0 - design.centers["mbase"]
        assert mu.shape == (2, 2)
        np.testing.assert_allclose(mu[0], -20.0 + 1.0 * t + 0.5 * d)
        np.testing.assert_allclose(mu[1], -10.0 + 2.0 * t + 0.1 * b)

    def test_group_index_unseen(self):
        """Test that studies absent from training map to -1."""
        design = ModelDesign.from_data(linear_specification(), make_data())
        frame = pd.DataFrame({"study_id": [1, 6, 99]})

        assert list(design.group_index(frame)) == [0, 5, -1]
