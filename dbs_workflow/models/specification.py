"""
Model specifications.

A ModelSpecification pairs a tuple of terms with a PriorSet and an outcome
noise family. Specifications are frozen and validated on construction:
an instance that exists is internally consistent. Checking it against a
particular dataset is a separate step (``validate_data``) that runs before
any sampler is touched.
"""

from dataclasses import dataclass
from enum import Enum
import hashlib
import json
from typing import Any, Callable, ClassVar, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from dbs_workflow.errors import SchemaError, SpecificationError
from dbs_workflow.models.priors import CoefficientClass, Prior, PriorSet
from dbs_workflow.models.terms import (
    MIN_SMOOTH_BASIS,
    ColumnRef,
    GroupIntercept,
    LinearTerm,
    SmoothTerm,
    Term,
)


class Family(Enum):
    """Outcome noise family."""
    GAUSSIAN = "gaussian"
    STUDENT_T = "student_t"

    @classmethod
    def parse(cls, value: Any) -> "Family":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError as e:
            raise SpecificationError(
                f"Unknown family: {value!r}. Available: {[f.value for f in cls]}"
            ) from e


@dataclass(frozen=True)
class ModelSpecification:
    """
    Immutable, validated model declaration.

    Attributes:
        name: Identifier of this experiment variant
        terms: Formula terms (linear, smooth, at most one group intercept)
        priors: Class defaults and per-coefficient overrides
        family: Outcome noise family
        outcome: Outcome column
        known_variance: Add the per-row sampling variance to the residual
            variance (meta-analytic measurement error)
        variance_column: Column holding the sampling variances
    """
    name: str
    terms: Tuple[Term, ...]
    priors: PriorSet
    family: Family = Family.GAUSSIAN
    outcome: str = "effect"
    known_variance: bool = False
    variance_column: str = "variance"

    def __post_init__(self):
        object.__setattr__(self, "terms", tuple(self.terms))
        object.__setattr__(self, "family", Family.parse(self.family))
        self._validate()

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    @property
    def linear_terms(self) -> List[LinearTerm]:
        return [t for t in self.terms if isinstance(t, LinearTerm)]

    @property
    def smooth_terms(self) -> List[SmoothTerm]:
        return [t for t in self.terms if isinstance(t, SmoothTerm)]

    @property
    def group_term(self) -> Optional[GroupIntercept]:
        groups = [t for t in self.terms if isinstance(t, GroupIntercept)]
        return groups[0] if groups else None

    @property
    def formula(self) -> str:
        rhs = " + ".join(t.label() for t in self.terms) or "1"
        return f"{self.outcome} ~ {rhs}"

    def coefficients(self) -> List[Tuple[CoefficientClass, str]]:
        """Every coefficient that needs a prior, in model order."""
        coefficients = [(CoefficientClass.INTERCEPT, "Intercept")]
        for term in self.terms:
            coefficients.extend(term.coefficients())
        coefficients.append((CoefficientClass.SIGMA, "sigma"))
        if self.family is Family.STUDENT_T:
            coefficients.append((CoefficientClass.NU, "nu"))
        return coefficients

    def resolved_priors(self) -> Dict[Tuple[CoefficientClass, str], Prior]:
        return {key: self.priors.resolve(*key) for key in self.coefficients()}

    def prior_table(self) -> pd.DataFrame:
        """One row per coefficient with its prior and where it came from."""
        rows = []
        overrides = self.priors.overrides
        for coefficient_class, name in self.coefficients():
            prior = self.priors.resolve(coefficient_class, name)
            rows.append({
                "class": coefficient_class.value,
                "coefficient": name,
                "prior": repr(prior),
                "source": "override" if (coefficient_class, name) in overrides else "default",
            })
        return pd.DataFrame(rows)

    def column_refs(self, include_outcome: bool = True) -> List[ColumnRef]:
        refs = [t.ref for t in self.terms]
        if include_outcome:
            refs.insert(0, ColumnRef(self.outcome))
            if self.known_variance:
                refs.append(ColumnRef(self.variance_column))
        return refs

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _validate(self) -> None:
        if not self.name:
            raise SpecificationError("Specification needs a name")

        for term in self.terms:
            if not isinstance(term, (LinearTerm, SmoothTerm, GroupIntercept)):
                raise SpecificationError(f"Unsupported term: {term!r}")

        groups = [t for t in self.terms if isinstance(t, GroupIntercept)]
        if len(groups) > 1:
            raise SpecificationError(
                f"At most one group intercept is supported, got {[g.column for g in groups]}"
            )

        for term in self.smooth_terms:
            if int(term.k) != term.k or term.k < MIN_SMOOTH_BASIS:
                raise SpecificationError(
                    f"Smooth term {term.label()} needs a basis dimension of at least "
                    f"{MIN_SMOOTH_BASIS}"
                )

        columns = [t.column for t in self.terms]
        repeated = sorted({c for c in columns if columns.count(c) > 1})
        if repeated:
            raise SpecificationError(f"Columns used by more than one term: {repeated}")
        if self.outcome in columns:
            raise SpecificationError(f"Outcome {self.outcome!r} also appears as a predictor")

        coefficients = self.coefficients()
        if len(set(coefficients)) != len(coefficients):
            raise SpecificationError(f"Coefficient names collide in {self.formula}")

        known = set(coefficients)
        for key in self.priors.overrides:
            if key not in known:
                coefficient_class, name = key
                available = sorted(n for c, n in known if c is coefficient_class)
                raise SpecificationError(
                    f"Prior references {coefficient_class.value} coefficient {name!r}, "
                    f"which is not in the formula {self.formula!r}. "
                    f"Available {coefficient_class.value} coefficients: {available}"
                )

        # Raises SpecificationError for any coefficient without a prior
        self.resolved_priors()

    def validate_data(self, frame: pd.DataFrame, include_outcome: bool = True) -> None:
        """
        Check that a dataset can be used with this specification.

        Raises:
            SchemaError: Missing or incomplete columns, wrong column types,
                negative variances, or too few distinct values for a smooth
        """
        if len(frame) == 0:
            raise SchemaError("Dataset is empty")

        missing = [r.column for r in self.column_refs(include_outcome) if r.column not in frame.columns]
        if missing:
            raise SchemaError(
                f"Dataset lacks columns required by {self.name!r} ({self.formula}): {missing}"
            )

        for ref in self.column_refs(include_outcome):
            ref.check(frame)

        if include_outcome and self.known_variance:
            if (frame[self.variance_column] < 0).any():
                raise SchemaError(f"Column {self.variance_column!r} has negative variances")

        for term in self.smooth_terms:
            n_unique = len(np.unique(frame[term.column].to_numpy(dtype=np.float64)))
            if include_outcome and n_unique < term.k:
                raise SchemaError(
                    f"Smooth term {term.label()} needs at least {term.k} distinct values "
                    f"of {term.column!r}, found {n_unique}"
                )

    # ------------------------------------------------------------------
    # Variants and identity
    # ------------------------------------------------------------------

    def with_family(self, family: Any, name: Optional[str] = None) -> "ModelSpecification":
        """Same terms and priors under a different noise family."""
        family = Family.parse(family)
        return ModelSpecification(
            name=name or f"{self.name}_{family.value}",
            terms=self.terms,
            priors=self.priors,
            family=family,
            outcome=self.outcome,
            known_variance=self.known_variance,
            variance_column=self.variance_column,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "formula": self.formula,
            "terms": [t.to_dict() for t in self.terms],
            "priors": self.priors.to_dict(),
            "family": self.family.value,
            "outcome": self.outcome,
            "known_variance": self.known_variance,
            "variance_column": self.variance_column,
        }

    def fingerprint(self) -> str:
        """Content hash of everything that affects the fitted model."""
        content = self.to_dict()
        # The name labels the artifact; it does not change the model
        content.pop("name")
        payload = json.dumps(content, sort_keys=True)
        return hashlib.sha256(payload.encode()).hexdigest()


def build_specification(
    name: str,
    terms: Sequence[Term],
    priors: PriorSet,
    family: Any = Family.GAUSSIAN,
    outcome: str = "effect",
    known_variance: bool = False,
    variance_column: str = "variance"
) -> ModelSpecification:
    """
    Build and validate a specification.

    Raises:
        SpecificationError: If a prior names a coefficient absent from the
            formula, a smooth term has k < 3, a coefficient has no prior,
            terms collide, or more than one group intercept is declared
    """
    return ModelSpecification(
        name=name,
        terms=tuple(terms),
        priors=priors,
        family=family,
        outcome=outcome,
        known_variance=known_variance,
        variance_column=variance_column,
    )


class SpecificationRegistry:
    """
    Registry of named specification builders.

    Example:
        >>> @SpecificationRegistry.register("linear")
        ... def linear(priors=None):
        ...     ...
        >>> spec = SpecificationRegistry.get("linear")
    """

    _builders: ClassVar[Dict[str, Callable[..., ModelSpecification]]] = {}

    @classmethod
    def register(cls, name: str) -> Callable:
        """Decorator registering a builder under ``name``."""
        def decorator(builder: Callable[..., ModelSpecification]) -> Callable[..., ModelSpecification]:
            cls._builders[name] = builder
            return builder
        return decorator

    @classmethod
    def get(cls, name: str, /, **kwargs: Any) -> ModelSpecification:
        """Build a registered specification by name; ``kwargs`` may include the builder's own ``name``."""
        if name not in cls._builders:
            available = list(cls._builders.keys())
            raise ValueError(f"Unknown specification: {name}. Available: {available}")
        return cls._builders[name](**kwargs)

    @classmethod
    def list_specifications(cls) -> List[str]:
        return list(cls._builders.keys())
