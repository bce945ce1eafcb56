"""
Named model variants of the DBS meta-analysis.

    linear        effect ~ time + mdur + mbase + (1 | study_id)
    gam_gaussian  effect ~ s(time, k=3) + mdur + mbase + (1 | study_id)
    gam_student   as gam_gaussian with Student-t noise

The GAM variants share one PriorSet, so the robust variant differs from the
Gaussian one only in its noise family (and the extra ``nu`` prior).
"""

from typing import Optional

from dbs_workflow.models.priors import Prior, PriorSet
from dbs_workflow.models.specification import (
    Family,
    ModelSpecification,
    SpecificationRegistry,
    build_specification,
)
from dbs_workflow.models.terms import GroupIntercept, LinearTerm, SmoothTerm


# UPDRS change scores are negative (improvement); the intercept prior is
# centered on a moderate improvement with a wide spread.
DEFAULT_PRIORS = PriorSet(
    defaults={
        "Intercept": Prior("Normal", mu=-20, sigma=10),
        "b": Prior("Normal", mu=0, sigma=5),
        "sd": Prior("HalfNormal", sigma=10),
        "sds": Prior("HalfNormal", sigma=5),
        "sigma": Prior("HalfNormal", sigma=5),
        "nu": Prior("Gamma", alpha=2, beta=0.1),
    },
    overrides={
        ("b", "mdur"): Prior("Normal", mu=0, sigma=2),
        ("b", "mbase"): Prior("Normal", mu=0, sigma=1),
    },
)

COVARIATES = ("mdur", "mbase")


@SpecificationRegistry.register("linear")
def linear_specification(
    priors: Optional[PriorSet] = None,
    name: str = "linear",
    known_variance: bool = False
) -> ModelSpecification:
    """Linear time trend with study-level covariates."""
    return build_specification(
        name=name,
        terms=(
            LinearTerm("time"),
            *(LinearTerm(c) for c in COVARIATES),
            GroupIntercept("study_id"),
        ),
        priors=priors or DEFAULT_PRIORS,
        family=Family.GAUSSIAN,
        known_variance=known_variance,
    )


@SpecificationRegistry.register("gam_gaussian")
def gam_gaussian_specification(
    priors: Optional[PriorSet] = None,
    name: str = "gam_gaussian",
    k: int = 3,
    known_variance: bool = False
) -> ModelSpecification:
    """Smooth time trend, Gaussian noise."""
    return build_specification(
        name=name,
        terms=(
            SmoothTerm("time", k=k),
            *(LinearTerm(c) for c in COVARIATES),
            GroupIntercept("study_id"),
        ),
        priors=priors or DEFAULT_PRIORS,
        family=Family.GAUSSIAN,
        known_variance=known_variance,
    )


@SpecificationRegistry.register("gam_student")
def gam_student_specification(
    priors: Optional[PriorSet] = None,
    name: str = "gam_student",
    k: int = 3,
    known_variance: bool = False
) -> ModelSpecification:
    """Smooth time trend, Student-t noise; otherwise identical to gam_gaussian."""
    gaussian = gam_gaussian_specification(priors=priors, k=k, known_variance=known_variance)
    return gaussian.with_family(Family.STUDENT_T, name=name)
