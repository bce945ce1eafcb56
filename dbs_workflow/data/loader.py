"""
Dataset Loader.

Reshapes a wide repeated-measures meta-analysis table (one row per study,
one effect/variance column pair per follow-up occasion) into the long
format used by every downstream step (one row per study and occasion).

The DBS dataset (Ishak et al., 2007) has four occasions:

    study | mdur | mbase | y1i | v1i | y2i | v2i | y3i | v3i | y4i | v4i

and becomes:

    study | occasion | time | effect | variance | mdur | mbase

Missing measurements are kept as NaN at this stage; they are removed by
the normalizer so that the reshaped table always has rows x occasions rows.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union
import numpy as np
from numpy.typing import NDArray
import pandas as pd

from dbs_workflow.errors import SchemaError


LONG_COLUMNS = ("study", "occasion", "time", "effect", "variance")


@dataclass(frozen=True)
class WideLayout:
    """
    Declares where each occasion lives in the wide table.

    Attributes:
        effect_columns: Outcome column of each occasion, in occasion order
        variance_columns: Sampling-variance column of each occasion
            (None entries, or None for all, when variances are not reported)
        times: Time value assigned to each occasion (strictly increasing)
        covariates: Study-level columns repeated on every occasion row
        study_column: Column holding the original study identifier
    """
    effect_columns: Tuple[str, ...]
    variance_columns: Optional[Tuple[Optional[str], ...]] = None
    times: Optional[Tuple[float, ...]] = None
    covariates: Tuple[str, ...] = field(default_factory=tuple)
    study_column: str = "study"

    def __post_init__(self):
        # Normalize sequences to tuples so the layout stays hashable
        object.__setattr__(self, "effect_columns", tuple(self.effect_columns))
        object.__setattr__(self, "covariates", tuple(self.covariates))
        if self.variance_columns is None:
            object.__setattr__(self, "variance_columns", (None,) * len(self.effect_columns))
        else:
            object.__setattr__(self, "variance_columns", tuple(self.variance_columns))
        if self.times is None:
            object.__setattr__(
                self, "times", tuple(float(i) for i in range(1, len(self.effect_columns) + 1))
            )
        else:
            object.__setattr__(self, "times", tuple(float(t) for t in self.times))
        self._check_groups()

    @property
    def n_occasions(self) -> int:
        return len(self.effect_columns)

    @classmethod
    def ishak(cls, study_column: str = "study") -> "WideLayout":
        """Four-occasion layout of the DBS meta-analysis dataset."""
        return cls(
            effect_columns=("y1i", "y2i", "y3i", "y4i"),
            variance_columns=("v1i", "v2i", "v3i", "v4i"),
            times=(1, 2, 3, 4),
            covariates=("mdur", "mbase"),
            study_column=study_column,
        )

    @classmethod
    def from_prefixes(
        cls,
        n_occasions: int,
        effect_prefix: str = "y",
        variance_prefix: Optional[str] = "v",
        suffix: str = "i",
        times: Optional[Sequence[float]] = None,
        covariates: Sequence[str] = (),
        study_column: str = "study"
    ) -> "WideLayout":
        """Build a layout from numbered column names such as y1i, v1i, y2i, ..."""
        effects = tuple(f"{effect_prefix}{j}{suffix}" for j in range(1, n_occasions + 1))
        variances = None
        if variance_prefix is not None:
            variances = tuple(f"{variance_prefix}{j}{suffix}" for j in range(1, n_occasions + 1))
        return cls(
            effect_columns=effects,
            variance_columns=variances,
            times=tuple(times) if times is not None else None,
            covariates=tuple(covariates),
            study_column=study_column,
        )

    def _check_groups(self) -> None:
        k = len(self.effect_columns)
        if k == 0:
            raise SchemaError("Layout declares no occasions")
        if len(self.variance_columns) != k:
            raise SchemaError(
                f"Occasion groups do not align: {k} effect columns, "
                f"{len(self.variance_columns)} variance columns"
            )
        if len(self.times) != k:
            raise SchemaError(
                f"Occasion groups do not align: {k} effect columns, {len(self.times)} time values"
            )
        if any(b <= a for a, b in zip(self.times, self.times[1:])):
            raise SchemaError(f"Occasion times must be strictly increasing, got {self.times}")

        declared = [self.study_column, *self.effect_columns, *self.covariates]
        declared += [c for c in self.variance_columns if c is not None]
        duplicates = sorted({c for c in declared if declared.count(c) > 1})
        if duplicates:
            raise SchemaError(f"Columns declared more than once: {duplicates}")

    def required_columns(self) -> list[str]:
        """All wide-table columns this layout reads."""
        columns = [self.study_column, *self.covariates, *self.effect_columns]
        columns += [c for c in self.variance_columns if c is not None]
        return columns


def read_wide_table(path: Union[str, Path]) -> pd.DataFrame:
    """
    Read a wide-format table from disk.

    Supports CSV, TSV and parquet, chosen by file suffix.
    """
    path = Path(path)
    suffix = path.suffix.lower()

    if suffix == ".csv":
        return pd.read_csv(path)
    if suffix in (".tsv", ".tab", ".txt"):
        return pd.read_csv(path, sep="\t")
    if suffix == ".parquet":
        return pd.read_parquet(path)

    raise ValueError(f"Unsupported table format: {path.suffix!r}")


def _numeric_block(frame: pd.DataFrame, columns: Sequence[Optional[str]]) -> NDArray[np.float64]:
    """Stack columns into a float matrix, NaN for undeclared columns."""
    block = np.full((len(frame), len(columns)), np.nan, dtype=np.float64)
    for j, column in enumerate(columns):
        if column is None:
            continue
        try:
            block[:, j] = pd.to_numeric(frame[column], errors="raise").to_numpy(dtype=np.float64)
        except (ValueError, TypeError) as e:
            raise SchemaError(f"Column {column!r} is not numeric: {e}") from e
    return block


def _check_study_key(frame: pd.DataFrame, study_column: str) -> None:
    studies = frame[study_column]
    if studies.isna().any():
        rows = list(np.flatnonzero(studies.isna().to_numpy()))
        raise SchemaError(f"Study identifier missing in rows {rows}")
    duplicated = studies[studies.duplicated()].unique().tolist()
    if duplicated:
        raise SchemaError(
            f"Study identifier is not a stable grouping key; repeated values: {duplicated}"
        )


def wide_to_long(frame: pd.DataFrame, layout: WideLayout) -> pd.DataFrame:
    """
    Reshape a wide table into long format.

    Each wide row becomes ``layout.n_occasions`` consecutive long rows,
    ordered by the wide row order and then by occasion. Study-level
    covariates are repeated on every occasion row. The input frame is not
    modified.

    Args:
        frame: Wide table, one row per study
        layout: Column layout of the wide table

    Returns:
        Long table with columns study, occasion, time, effect, variance
        followed by the layout covariates

    Raises:
        SchemaError: If declared columns are missing, outcome columns are not
            numeric, or the study column cannot serve as a grouping key
    """
    missing = [c for c in layout.required_columns() if c not in frame.columns]
    if missing:
        raise SchemaError(f"Wide table lacks declared columns: {missing}")

    clash = [c for c in layout.covariates if c in LONG_COLUMNS]
    if clash:
        raise SchemaError(f"Covariate names collide with long-format columns: {clash}")

    _check_study_key(frame, layout.study_column)

    base = frame.reset_index(drop=True)
    n_rows = len(base)
    k = layout.n_occasions

    effects = _numeric_block(base, layout.effect_columns)
    variances = _numeric_block(base, layout.variance_columns)

    # Row-major flattening keeps each study's occasions contiguous
    long = pd.DataFrame({
        "study": np.repeat(base[layout.study_column].to_numpy(), k),
        "occasion": np.tile(np.arange(1, k + 1, dtype=np.int64), n_rows),
        "time": np.tile(np.asarray(layout.times, dtype=np.float64), n_rows),
        "effect": effects.reshape(-1),
        "variance": variances.reshape(-1),
    })

    for covariate in layout.covariates:
        long[covariate] = np.repeat(base[covariate].to_numpy(), k)

    return long
