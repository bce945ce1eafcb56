"""
Derived-Field Normalizer.

Turns the long table produced by the loader into the working dataset:

1. Drop every row whose outcome is missing
2. Renumber studies densely (1..m) in order of first appearance
3. Reset the row index to 0..n-1

Renumbering runs strictly AFTER row removal. Renumbering first would leave
gaps (or shift ids) whenever a whole study has no observed outcome.

Every transformation is recorded in a NormalizationReport so exclusions are
never silent.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple
import warnings
import numpy as np
import pandas as pd

from dbs_workflow.data.loader import WideLayout, wide_to_long
from dbs_workflow.errors import SchemaError


@dataclass
class NormalizationReport:
    """
    Record of what the normalizer removed and renumbered.

    Attributes:
        n_original: Rows received
        n_missing_outcome: Rows dropped because the outcome was missing
        n_final: Rows kept
        n_studies_original: Distinct studies received
        n_studies_final: Distinct studies kept
        dropped_studies: Original identifiers of studies with no surviving rows
        warnings: Human-readable notes
    """
    n_original: int
    n_missing_outcome: int
    n_final: int
    n_studies_original: int
    n_studies_final: int
    dropped_studies: List[Any] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def retention_rate(self) -> float:
        if self.n_original == 0:
            return 0.0
        return self.n_final / self.n_original


class StudyNormalizer:
    """
    Drop incomplete observations and derive dense study ids.

    Example:
        >>> normalizer = StudyNormalizer()
        >>> data, report = normalizer.normalize(long_frame)
        >>> sorted(data["study_id"].unique())
        [1, 2, 3]
    """

    def __init__(
        self,
        outcome: str = "effect",
        study_column: str = "study",
        id_column: str = "study_id",
        time_column: str = "time"
    ):
        self.outcome = outcome
        self.study_column = study_column
        self.id_column = id_column
        self.time_column = time_column

    def normalize(self, frame: pd.DataFrame) -> Tuple[pd.DataFrame, NormalizationReport]:
        """
        Normalize a long-format table.

        Args:
            frame: Long table with at least study, time and outcome columns

        Returns:
            Tuple of (normalized copy, report)

        Raises:
            SchemaError: If required columns are missing or time is not
                ordered within a study
        """
        required = [self.study_column, self.time_column, self.outcome]
        missing = [c for c in required if c not in frame.columns]
        if missing:
            raise SchemaError(f"Long table lacks columns: {missing}")

        notes = []
        studies_before = pd.unique(frame[self.study_column])

        keep = frame[self.outcome].notna().to_numpy()
        n_dropped = int((~keep).sum())
        if n_dropped:
            notes.append(f"Removed {n_dropped} rows with missing {self.outcome}")

        data = frame.loc[keep].copy()

        # Dense ids over surviving rows only, first appearance order
        codes, _ = pd.factorize(data[self.study_column], sort=False)
        data[self.id_column] = (codes + 1).astype(np.int64)
        data = data.reset_index(drop=True)

        self._check_time_order(data)

        surviving = set(pd.unique(data[self.study_column]))
        dropped_studies = [s for s in studies_before if s not in surviving]
        if dropped_studies:
            notes.append(
                f"{len(dropped_studies)} studies had no observed {self.outcome} and were removed: "
                f"{dropped_studies}"
            )
            warnings.warn(notes[-1], UserWarning)

        report = NormalizationReport(
            n_original=len(frame),
            n_missing_outcome=n_dropped,
            n_final=len(data),
            n_studies_original=len(studies_before),
            n_studies_final=len(surviving),
            dropped_studies=dropped_studies,
            warnings=notes,
        )

        return data, report

    def _check_time_order(self, data: pd.DataFrame) -> None:
        """Rows of each study must be contiguous and ordered by time."""
        ids = data[self.id_column].to_numpy()
        if len(ids) == 0:
            return

        # Contiguity: ids never decrease because they follow first appearance
        if np.any(np.diff(ids) < 0):
            raise SchemaError("Rows of a study are not contiguous")

        times = data[self.time_column].to_numpy(dtype=np.float64)
        same_study = ids[1:] == ids[:-1]
        if np.any(same_study & (np.diff(times) <= 0)):
            raise SchemaError("Time is not strictly increasing within a study")


def prepare_dataset(
    frame: pd.DataFrame,
    layout: Optional[WideLayout] = None,
    normalizer: Optional[StudyNormalizer] = None
) -> Tuple[pd.DataFrame, NormalizationReport]:
    """
    Loader + normalizer in one call.

    Any SchemaError raised here aborts the workflow before fitting begins.

    Args:
        frame: Wide table
        layout: Wide layout (defaults to the four-occasion DBS layout)
        normalizer: Normalizer (defaults to StudyNormalizer())

    Returns:
        Tuple of (working dataset, report)
    """
    layout = layout or WideLayout.ishak()
    normalizer = normalizer or StudyNormalizer()
    return normalizer.normalize(wide_to_long(frame, layout))
