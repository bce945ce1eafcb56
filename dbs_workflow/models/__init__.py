"""
Model Specification Builder.

A model is declared as an explicit tuple of terms plus a PriorSet:

1. Terms: LinearTerm, SmoothTerm (penalized spline), GroupIntercept
   - Each term references its column through a typed ColumnRef

2. Priors: class-level defaults (b, Intercept, sd, sds, sigma, nu)
   plus per-coefficient overrides

3. Family: Gaussian or Student-t noise on the same terms and priors

Specifications are validated on construction (SpecificationError) and
against a dataset before any sampling (SchemaError). The PyMC backend
turns a specification into a ``pymc.Model``.
"""

from dbs_workflow.models.priors import CoefficientClass, Prior, PriorSet
from dbs_workflow.models.terms import ColumnRef, GroupIntercept, LinearTerm, SmoothTerm
from dbs_workflow.models.specification import (
    Family,
    ModelSpecification,
    SpecificationRegistry,
    build_specification,
)
from dbs_workflow.models.library import (
    DEFAULT_PRIORS,
    gam_gaussian_specification,
    gam_student_specification,
    linear_specification,
)
from dbs_workflow.models.backend import ModelDesign, SmoothBasis, variable_name

__all__ = [
    "CoefficientClass",
    "Prior",
    "PriorSet",
    "ColumnRef",
    "GroupIntercept",
    "LinearTerm",
    "SmoothTerm",
    "Family",
    "ModelSpecification",
    "SpecificationRegistry",
    "build_specification",
    "DEFAULT_PRIORS",
    "gam_gaussian_specification",
    "gam_student_specification",
    "linear_specification",
    "ModelDesign",
    "SmoothBasis",
    "variable_name",
]
