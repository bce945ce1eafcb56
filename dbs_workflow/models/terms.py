"""
Formula terms.

A model formula is an explicit tuple of terms instead of a string. Each term
names its column through a typed ColumnRef, so a missing or malformed
column is reported by validation before any model is built, not as a
lookup failure in the middle of sampling.

    effect ~ s(time, k=3) + mdur + mbase + (1 | study_id)

is written as

    (SmoothTerm("time", k=3), LinearTerm("mdur"), LinearTerm("mbase"),
     GroupIntercept("study_id"))
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Tuple, Union
import numpy as np
from numpy.typing import NDArray
import pandas as pd

from dbs_workflow.errors import SchemaError
from dbs_workflow.models.priors import CoefficientClass


# Smallest basis dimension for which a smooth has a penalized component
MIN_SMOOTH_BASIS = 3


class ColumnKind(Enum):
    NUMERIC = "numeric"
    CATEGORICAL = "categorical"


@dataclass(frozen=True)
class ColumnRef:
    """Typed accessor for one dataset column."""
    column: str
    kind: ColumnKind = ColumnKind.NUMERIC

    def check(self, frame: pd.DataFrame) -> None:
        """Raise SchemaError unless the column exists, is complete and has the right kind."""
        if self.column not in frame.columns:
            raise SchemaError(f"Dataset lacks column {self.column!r}")
        values = frame[self.column]
        if values.isna().any():
            raise SchemaError(
                f"Column {self.column!r} has {int(values.isna().sum())} missing values"
            )
        if self.kind is ColumnKind.NUMERIC and not pd.api.types.is_numeric_dtype(values):
            raise SchemaError(f"Column {self.column!r} must be numeric, got {values.dtype}")

    def extract(self, frame: pd.DataFrame) -> NDArray:
        self.check(frame)
        if self.kind is ColumnKind.NUMERIC:
            return frame[self.column].to_numpy(dtype=np.float64)
        return frame[self.column].to_numpy()


@dataclass(frozen=True)
class LinearTerm:
    """Fixed-effect slope on a numeric column."""
    column: str

    kind = "linear"

    @property
    def name(self) -> str:
        return self.column

    @property
    def ref(self) -> ColumnRef:
        return ColumnRef(self.column)

    def coefficients(self) -> List[Tuple[CoefficientClass, str]]:
        return [(CoefficientClass.B, self.name)]

    def label(self) -> str:
        return self.column

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "column": self.column}


@dataclass(frozen=True)
class SmoothTerm:
    """
    Penalized smooth of a numeric column with basis dimension k.

    The smooth is split into an unpenalized linear part (a fixed-effect
    slope named after the term) and k - 2 penalized basis functions whose
    coefficients share one standard deviation (class ``sds``).
    """
    column: str
    k: int = 5

    kind = "smooth"

    @property
    def name(self) -> str:
        return f"s{self.column}"

    @property
    def ref(self) -> ColumnRef:
        return ColumnRef(self.column)

    @property
    def n_penalized(self) -> int:
        return self.k - 2

    def coefficients(self) -> List[Tuple[CoefficientClass, str]]:
        return [(CoefficientClass.B, self.name), (CoefficientClass.SDS, self.name)]

    def label(self) -> str:
        return f"s({self.column}, k={self.k})"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "column": self.column, "k": self.k}


@dataclass(frozen=True)
class GroupIntercept:
    """Varying intercept per level of a grouping column."""
    column: str = "study_id"

    kind = "group"

    @property
    def name(self) -> str:
        return self.column

    @property
    def ref(self) -> ColumnRef:
        return ColumnRef(self.column, ColumnKind.CATEGORICAL)

    def coefficients(self) -> List[Tuple[CoefficientClass, str]]:
        return [(CoefficientClass.SD, self.name)]

    def label(self) -> str:
        return f"(1 | {self.column})"

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "column": self.column}


Term = Union[LinearTerm, SmoothTerm, GroupIntercept]
