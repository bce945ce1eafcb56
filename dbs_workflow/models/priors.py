"""
Prior distributions and coefficient classes.

Priors are declared per coefficient class (every fixed effect, the
intercept, the group-level sd, ...) and may be overridden for individual
coefficients. A PriorSet resolves the prior of a coefficient as:

    explicit override  ->  class default  ->  SpecificationError
"""

from enum import Enum
from typing import Any, Dict, FrozenSet, Iterator, Mapping, Optional, Tuple

from dbs_workflow.errors import SpecificationError


class CoefficientClass(Enum):
    """Classes of model coefficients that receive priors."""
    B = "b"                  # fixed-effect slopes
    INTERCEPT = "Intercept"
    SD = "sd"                # group-level standard deviation
    SDS = "sds"              # smooth-term penalty standard deviation
    SIGMA = "sigma"          # residual scale
    NU = "nu"                # Student-t degrees of freedom

    @classmethod
    def parse(cls, value: Any) -> "CoefficientClass":
        if isinstance(value, cls):
            return value
        for member in cls:
            if member.value == value or member.name == str(value).upper():
                return member
        raise SpecificationError(
            f"Unknown coefficient class: {value!r}. Available: {[m.value for m in cls]}"
        )


# Classes whose parameters live on (0, inf)
SCALE_CLASSES = frozenset({
    CoefficientClass.SD,
    CoefficientClass.SDS,
    CoefficientClass.SIGMA,
    CoefficientClass.NU,
})

# Family -> (parameter names, strictly positive parameters, positive support)
FAMILIES: Dict[str, Tuple[Tuple[str, ...], FrozenSet[str], bool]] = {
    "Normal": (("mu", "sigma"), frozenset({"sigma"}), False),
    "StudentT": (("nu", "mu", "sigma"), frozenset({"nu", "sigma"}), False),
    "Cauchy": (("alpha", "beta"), frozenset({"beta"}), False),
    "HalfNormal": (("sigma",), frozenset({"sigma"}), True),
    "HalfStudentT": (("nu", "sigma"), frozenset({"nu", "sigma"}), True),
    "HalfCauchy": (("beta",), frozenset({"beta"}), True),
    "Exponential": (("lam",), frozenset({"lam"}), True),
    "Gamma": (("alpha", "beta"), frozenset({"alpha", "beta"}), True),
    "LogNormal": (("mu", "sigma"), frozenset({"sigma"}), True),
    "Uniform": (("lower", "upper"), frozenset(), False),
}


class Prior:
    """
    A prior distribution: family name plus parameters.

    Immutable and hashable, so it can be part of a frozen specification
    and of a cache key.

    Example:
        >>> Prior("Normal", mu=0, sigma=5)
        Prior('Normal', mu=0.0, sigma=5.0)
    """

    __slots__ = ("_family", "_params")

    def __init__(self, family: str, **params: float):
        if family not in FAMILIES:
            raise SpecificationError(
                f"Unknown prior family: {family!r}. Available: {sorted(FAMILIES)}"
            )
        names, positive, _ = FAMILIES[family]
        missing = [p for p in names if p not in params]
        extra = [p for p in params if p not in names]
        if missing or extra:
            raise SpecificationError(
                f"{family} prior takes parameters {list(names)}; "
                f"missing {missing}, unexpected {extra}"
            )

        values = {}
        for name in names:
            try:
                values[name] = float(params[name])
            except (TypeError, ValueError) as e:
                raise SpecificationError(f"{family} parameter {name!r} must be numeric") from e
            if name in positive and values[name] <= 0:
                raise SpecificationError(f"{family} parameter {name!r} must be positive")

        if family == "Uniform" and values["upper"] <= values["lower"]:
            raise SpecificationError("Uniform prior needs lower < upper")

        object.__setattr__(self, "_family", family)
        object.__setattr__(self, "_params", tuple((n, values[n]) for n in names))

    def __setattr__(self, name, value):
        raise AttributeError("Prior is immutable")

    def __reduce__(self):
        # Slots plus a blocked __setattr__ defeat default pickling
        return (_restore_prior, (self._family, self._params))

    @property
    def family(self) -> str:
        return self._family

    @property
    def params(self) -> Dict[str, float]:
        return dict(self._params)

    @property
    def positive_support(self) -> bool:
        if self._family == "Uniform":
            return self.params["lower"] >= 0
        return FAMILIES[self._family][2]

    def to_dict(self) -> Dict[str, Any]:
        return {"family": self._family, **self.params}

    def build(self, name: str, **kwargs: Any):
        """Create the PyMC random variable for this prior inside a model context."""
        import pymc as pm

        distribution = getattr(pm, self._family)
        return distribution(name, **self.params, **kwargs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Prior):
            return NotImplemented
        return self._family == other._family and self._params == other._params

    def __hash__(self) -> int:
        return hash((self._family, self._params))

    def __repr__(self) -> str:
        args = ", ".join(f"{n}={v!r}" for n, v in self._params)
        return f"Prior({self._family!r}, {args})"


def _restore_prior(family: str, params: Tuple[Tuple[str, float], ...]) -> Prior:
    return Prior(family, **dict(params))


class PriorSet:
    """
    Class-level default priors plus per-coefficient overrides.

    PriorSet is immutable: ``with_default`` and ``with_override`` return
    new sets.

    Example:
        >>> priors = PriorSet(
        ...     defaults={"b": Prior("Normal", mu=0, sigma=5)},
        ...     overrides={("b", "mdur"): Prior("Normal", mu=0, sigma=2)},
        ... )
        >>> priors.resolve("b", "mdur")
        Prior('Normal', mu=0.0, sigma=2.0)
    """

    def __init__(
        self,
        defaults: Optional[Mapping[Any, Prior]] = None,
        overrides: Optional[Mapping[Tuple[Any, str], Prior]] = None
    ):
        self._defaults: Dict[CoefficientClass, Prior] = {}
        self._overrides: Dict[Tuple[CoefficientClass, str], Prior] = {}

        for cls_key, prior in (defaults or {}).items():
            coefficient_class = CoefficientClass.parse(cls_key)
            self._defaults[coefficient_class] = self._checked(coefficient_class, prior)

        for key, prior in (overrides or {}).items():
            try:
                cls_key, coefficient = key
            except (TypeError, ValueError) as e:
                raise SpecificationError(
                    f"Override keys must be (class, coefficient) pairs, got {key!r}"
                ) from e
            coefficient_class = CoefficientClass.parse(cls_key)
            self._overrides[(coefficient_class, str(coefficient))] = self._checked(
                coefficient_class, prior
            )

    @staticmethod
    def _checked(coefficient_class: CoefficientClass, prior: Prior) -> Prior:
        if not isinstance(prior, Prior):
            raise SpecificationError(f"Expected a Prior for {coefficient_class.value}, got {prior!r}")
        if coefficient_class in SCALE_CLASSES and not prior.positive_support:
            raise SpecificationError(
                f"Class {coefficient_class.value!r} is a scale parameter; "
                f"{prior.family} does not have positive support"
            )
        return prior

    @property
    def defaults(self) -> Dict[CoefficientClass, Prior]:
        return dict(self._defaults)

    @property
    def overrides(self) -> Dict[Tuple[CoefficientClass, str], Prior]:
        return dict(self._overrides)

    def with_default(self, coefficient_class: Any, prior: Prior) -> "PriorSet":
        defaults = self.defaults
        defaults[CoefficientClass.parse(coefficient_class)] = prior
        return PriorSet(defaults, self._overrides)

    def with_override(self, coefficient_class: Any, coefficient: str, prior: Prior) -> "PriorSet":
        overrides = self.overrides
        overrides[(CoefficientClass.parse(coefficient_class), coefficient)] = prior
        return PriorSet(self._defaults, overrides)

    def resolve(self, coefficient_class: Any, coefficient: str) -> Prior:
        """Prior for one coefficient: override first, then class default."""
        coefficient_class = CoefficientClass.parse(coefficient_class)
        prior = self._overrides.get((coefficient_class, coefficient))
        if prior is None:
            prior = self._defaults.get(coefficient_class)
        if prior is None:
            raise SpecificationError(
                f"No prior for {coefficient_class.value} coefficient {coefficient!r} "
                f"and no class-level default"
            )
        return prior

    def __iter__(self) -> Iterator[Tuple[CoefficientClass, Optional[str], Prior]]:
        for coefficient_class, prior in self._defaults.items():
            yield coefficient_class, None, prior
        for (coefficient_class, coefficient), prior in self._overrides.items():
            yield coefficient_class, coefficient, prior

    def to_dict(self) -> Dict[str, Any]:
        return {
            "defaults": {c.value: p.to_dict() for c, p in sorted(
                self._defaults.items(), key=lambda item: item[0].value)},
            "overrides": {f"{c.value}:{name}": p.to_dict() for (c, name), p in sorted(
                self._overrides.items(), key=lambda item: (item[0][0].value, item[0][1]))},
        }

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, PriorSet):
            return NotImplemented
        return self._defaults == other._defaults and self._overrides == other._overrides

    def __hash__(self) -> int:
        return hash((frozenset(self._defaults.items()), frozenset(self._overrides.items())))

    def __repr__(self) -> str:
        return f"PriorSet(defaults={self._defaults!r}, overrides={self._overrides!r})"
