"""
PyMC backend.

Turns a validated ModelSpecification plus a dataset into a ``pymc.Model``.
The same ModelDesign evaluates the linear predictor for new covariate
values from posterior draws, so prediction never re-derives the basis or
the centering from the new data.

Parameterization:

    mu = Intercept
         + sum_j b_j * (x_j - mean(x_j))                 linear terms
         + b_s * (t - mean(t)) + Z_s @ (sds_s * zs_s)    smooth terms
         + sd_g * z_g[group]                             group intercept

Smooth and group effects are non-centered (zs, z ~ Normal(0, 1)).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional
import numpy as np
from numpy.typing import NDArray
import pandas as pd
import pymc as pm
from scipy.interpolate import BSpline
import xarray as xr

from dbs_workflow.errors import SchemaError
from dbs_workflow.models.priors import CoefficientClass
from dbs_workflow.models.specification import Family, ModelSpecification
from dbs_workflow.models.terms import SmoothTerm


def variable_name(coefficient_class: CoefficientClass, coefficient: str) -> str:
    """Name of the PyMC random variable carrying a coefficient."""
    if coefficient_class in (CoefficientClass.INTERCEPT, CoefficientClass.SIGMA, CoefficientClass.NU):
        return coefficient_class.value
    return f"{coefficient_class.value}_{coefficient}"


@dataclass
class SmoothBasis:
    """
    Penalized spline basis of one numeric column.

    A clamped B-spline basis of dimension k is built on the observed range,
    the constant and linear components are projected out (they are carried
    by the intercept and the unpenalized slope) and the remainder is
    rotated onto its k - 2 principal directions and scaled to unit sd.

    Attributes:
        k: Basis dimension
        degree: Spline degree
        knots: Full clamped knot vector
        center: Training mean, subtracted before the linear projection
        projection: Least-squares coefficients of the raw basis on [1, x - center]
        rotation: Right singular vectors kept (k x (k - 2))
        scale: Column standard deviations after rotation
    """
    k: int
    degree: int
    knots: NDArray[np.float64]
    center: float
    projection: NDArray[np.float64]
    rotation: NDArray[np.float64]
    scale: NDArray[np.float64]

    @property
    def lower(self) -> float:
        return float(self.knots[0])

    @property
    def upper(self) -> float:
        return float(self.knots[-1])

    @property
    def n_columns(self) -> int:
        return self.rotation.shape[1]

    @classmethod
    def fit(cls, x: NDArray[np.float64], k: int) -> "SmoothBasis":
        """
        Build the basis from training values.

        Raises:
            SchemaError: If x has fewer than k distinct values or the
                penalized columns are degenerate
        """
        x = np.asarray(x, dtype=np.float64)
        unique = np.unique(x)
        if len(unique) < k:
            raise SchemaError(
                f"A smooth with k={k} needs at least {k} distinct values, found {len(unique)}"
            )

        degree = min(3, k - 1)
        n_interior = k - degree - 1
        lower, upper = unique[0], unique[-1]
        interior = np.quantile(unique, np.linspace(0.0, 1.0, n_interior + 2)[1:-1])
        knots = np.concatenate([
            np.repeat(lower, degree + 1),
            interior,
            np.repeat(upper, degree + 1),
        ])

        raw = cls._raw(x, knots, degree, lower, upper)
        center = float(x.mean())
        linear = np.column_stack([np.ones_like(x), x - center])
        projection, *_ = np.linalg.lstsq(linear, raw, rcond=None)
        residual = raw - linear @ projection

        _, _, vt = np.linalg.svd(residual, full_matrices=False)
        rotation = vt[: k - 2].T
        rotated = residual @ rotation
        scale = rotated.std(axis=0)
        if np.any(scale < 1e-10):
            raise SchemaError(f"Smooth basis with k={k} is degenerate on the observed values")

        return cls(
            k=k,
            degree=degree,
            knots=knots,
            center=center,
            projection=projection,
            rotation=rotation,
            scale=scale,
        )

    @staticmethod
    def _raw(
        x: NDArray[np.float64],
        knots: NDArray[np.float64],
        degree: int,
        lower: float,
        upper: float
    ) -> NDArray[np.float64]:
        # Values outside the training range are evaluated at the boundary
        clipped = np.clip(x, lower, upper)
        return BSpline.design_matrix(clipped, knots, degree).toarray()

    def transform(self, x: NDArray[np.float64]) -> NDArray[np.float64]:
        """Penalized design columns for (new) values of the column."""
        x = np.asarray(x, dtype=np.float64)
        raw = self._raw(x, self.knots, self.degree, self.lower, self.upper)
        linear = np.column_stack([np.ones_like(x), x - self.center])
        return (raw - linear @ self.projection) @ self.rotation / self.scale


@dataclass
class ModelDesign:
    """
    Design of one specification on one training dataset.

    Example:
        >>> design = ModelDesign.from_data(spec, data)
        >>> with design.build_model(data):
        ...     idata = pm.sample()
        >>> mu = design.expected_value(idata.posterior, grid)
    """
    specification: ModelSpecification
    centers: Dict[str, float] = field(default_factory=dict)
    bases: Dict[str, SmoothBasis] = field(default_factory=dict)
    group_levels: Optional[NDArray] = None

    @classmethod
    def from_data(cls, specification: ModelSpecification, data: pd.DataFrame) -> "ModelDesign":
        specification.validate_data(data)

        centers = {
            term.column: float(term.ref.extract(data).mean())
            for term in specification.linear_terms
        }
        bases = {
            term.name: SmoothBasis.fit(term.ref.extract(data), term.k)
            for term in specification.smooth_terms
        }
        group_levels = None
        if specification.group_term is not None:
            group_levels = np.unique(specification.group_term.ref.extract(data))

        return cls(specification, centers, bases, group_levels)

    # ------------------------------------------------------------------
    # Model construction
    # ------------------------------------------------------------------

    def coords(self, n_obs: int) -> Dict[str, NDArray]:
        coords = {"obs_id": np.arange(n_obs)}
        for term in self.specification.smooth_terms:
            coords[self._basis_dim(term)] = np.arange(self.bases[term.name].n_columns)
        group = self.specification.group_term
        if group is not None:
            coords[group.column] = self.group_levels
        return coords

    def group_index(self, frame: pd.DataFrame) -> NDArray[np.int64]:
        """Position of each row's group among the training levels (-1 if unseen)."""
        group = self.specification.group_term
        values = group.ref.extract(frame)
        return pd.Categorical(values, categories=self.group_levels).codes.astype(np.int64)

    def parameter_names(self) -> List[str]:
        """Names of the prior-bearing random variables, in model order."""
        return [variable_name(c, n) for c, n in self.specification.coefficients()]

    def build_model(self, data: pd.DataFrame) -> pm.Model:
        """Build the PyMC model with the outcome observed on ``data``."""
        spec = self.specification
        spec.validate_data(data)
        priors = spec.resolved_priors()

        def prior_rv(coefficient_class: CoefficientClass, coefficient: str, **kwargs):
            prior = priors[(coefficient_class, coefficient)]
            return prior.build(variable_name(coefficient_class, coefficient), **kwargs)

        y = data[spec.outcome].to_numpy(dtype=np.float64)

        with pm.Model(coords=self.coords(len(data))) as model:
            mu = prior_rv(CoefficientClass.INTERCEPT, "Intercept")

            for term in spec.linear_terms:
                x = term.ref.extract(data) - self.centers[term.column]
                mu = mu + prior_rv(CoefficientClass.B, term.name) * x

            for term in spec.smooth_terms:
                basis = self.bases[term.name]
                x = term.ref.extract(data)
                slope = prior_rv(CoefficientClass.B, term.name)
                sds = prior_rv(CoefficientClass.SDS, term.name)
                zs = pm.Normal(f"zs_{term.name}", mu=0.0, sigma=1.0, dims=self._basis_dim(term))
                mu = mu + slope * (x - basis.center) + pm.math.dot(basis.transform(x), zs * sds)

            group = spec.group_term
            if group is not None:
                sd = prior_rv(CoefficientClass.SD, group.name)
                z = pm.Normal(f"z_{group.name}", mu=0.0, sigma=1.0, dims=group.column)
                mu = mu + (z * sd)[self.group_index(data)]

            sigma = prior_rv(CoefficientClass.SIGMA, "sigma")
            if spec.known_variance:
                variance = data[spec.variance_column].to_numpy(dtype=np.float64)
                scale = pm.math.sqrt(sigma ** 2 + variance)
            else:
                scale = sigma

            if spec.family is Family.STUDENT_T:
                nu = prior_rv(CoefficientClass.NU, "nu")
                pm.StudentT(spec.outcome, nu=nu, mu=mu, sigma=scale, observed=y, dims="obs_id")
            else:
                pm.Normal(spec.outcome, mu=mu, sigma=scale, observed=y, dims="obs_id")

        return model

    @staticmethod
    def _basis_dim(term: SmoothTerm) -> str:
        return f"{term.name}_basis"

    # ------------------------------------------------------------------
    # Prediction
    # ------------------------------------------------------------------

    def expected_value(
        self,
        draws: xr.Dataset,
        frame: pd.DataFrame,
        include_group: bool = False
    ) -> NDArray[np.float64]:
        """
        Linear predictor for every draw and row of ``frame``.

        Args:
            draws: Posterior (or prior) group with chain and draw dims
            frame: Rows to evaluate; needs every covariate column
            include_group: Add the group intercept of each row's study
                (unseen studies contribute zero)

        Returns:
            Array of shape (n_draws, n_rows)
        """
        spec = self.specification
        for term in spec.linear_terms + spec.smooth_terms:
            term.ref.check(frame)

        stacked = draws.stack(sample=("chain", "draw"))

        def values(name: str) -> NDArray[np.float64]:
            return stacked[name].transpose("sample", ...).to_numpy()

        mu = np.repeat(values("Intercept")[:, None], len(frame), axis=1)

        for term in spec.linear_terms:
            x = term.ref.extract(frame) - self.centers[term.column]
            mu = mu + values(f"b_{term.name}")[:, None] * x[None, :]

        for term in spec.smooth_terms:
            basis = self.bases[term.name]
            x = term.ref.extract(frame)
            mu = mu + values(f"b_{term.name}")[:, None] * (x - basis.center)[None, :]
            weights = values(f"zs_{term.name}") * values(f"sds_{term.name}")[:, None]
            mu = mu + weights @ basis.transform(x).T

        group = spec.group_term
        if include_group and group is not None:
            idx = self.group_index(frame)
            effects = values(f"z_{group.name}") * values(f"sd_{group.name}")[:, None]
            seen = idx >= 0
            mu[:, seen] = mu[:, seen] + effects[:, idx[seen]]

        return mu
