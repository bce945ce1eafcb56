"""
Model comparison by expected log predictive density.

Models are ranked with ``az.compare`` on their PSIS-LOO results (higher
elpd_loo is better). Every model is compared to the best one through the
pointwise elpd differences, giving ``elpd_diff`` and its standard error
``dse``.

A difference smaller than its standard error is reported as
``indistinguishable``, never as a win. Reports from unreliable fits are
refused unless the caller overrides explicitly.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import List, Optional, Sequence, Tuple

import arviz as az
import pandas as pd

from dbs_workflow.analysis.diagnostics import LooReport
from dbs_workflow.errors import UnreliableArtifactError


class Verdict(Enum):
    BEST = "best"
    WORSE = "worse"
    INDISTINGUISHABLE = "indistinguishable"


@dataclass
class ComparisonRow:
    """
    One model in a comparison.

    Attributes:
        name: Artifact name
        rank: 1 for the highest elpd
        elpd: elpd_loo
        se: Standard error of elpd_loo
        elpd_diff: Difference to the best model (0 for the best)
        se_diff: Standard error of the difference (0 for the best)
        p_loo: Effective number of parameters
        n_flagged: Observations with high Pareto k
        verdict: best / worse / indistinguishable
        weight: Stacking weight from ``az.compare``
        reliable: Reliability of the underlying artifact
    """
    name: str
    rank: int
    elpd: float
    se: float
    elpd_diff: float
    se_diff: float
    p_loo: float
    n_flagged: int
    verdict: Verdict
    weight: float = 0.0
    reliable: bool = True


@dataclass
class ComparisonResult:
    """Ranked comparison of several models."""
    rows: List[ComparisonRow] = field(default_factory=list)

    @property
    def best(self) -> ComparisonRow:
        return self.rows[0]

    @property
    def winner(self) -> Optional[str]:
        """Name of the best model, or None if any other model is indistinguishable from it."""
        if not self.rows:
            return None
        if any(r.verdict is Verdict.INDISTINGUISHABLE for r in self.rows[1:]):
            return None
        return self.best.name

    def indistinguishable(self) -> List[str]:
        return [r.name for r in self.rows if r.verdict is Verdict.INDISTINGUISHABLE]

    def get(self, name: str) -> ComparisonRow:
        for row in self.rows:
            if row.name == name:
                return row
        raise KeyError(name)

    def to_frame(self) -> pd.DataFrame:
        records = []
        for row in self.rows:
            records.append({
                "model": row.name,
                "rank": row.rank,
                "elpd_loo": row.elpd,
                "se": row.se,
                "elpd_diff": row.elpd_diff,
                "se_diff": row.se_diff,
                "p_loo": row.p_loo,
                "n_high_pareto_k": row.n_flagged,
                "verdict": row.verdict.value,
                "weight": row.weight,
                "reliable": row.reliable,
            })
        return pd.DataFrame(records).set_index("model")

    def summary(self) -> str:
        lines = []
        for row in self.rows:
            line = (
                f"{row.rank}. {row.name}: elpd = {row.elpd:.2f} (SE {row.se:.2f})"
            )
            if row.rank > 1:
                line += f", diff = {row.elpd_diff:.2f} (SE {row.se_diff:.2f}) [{row.verdict.value}]"
            if not row.reliable:
                line += " UNRELIABLE"
            lines.append(line)
        if self.winner is None and len(self.rows) > 1:
            lines.append(
                "No model is preferred: the difference to "
                f"{', '.join(self.indistinguishable())} is within one standard error"
            )
        return "\n".join(lines)


def rank_table(reports: Sequence[LooReport]) -> pd.DataFrame:
    """``az.compare`` table of the reports, best first, indexed by report name."""
    if len({r.n_observations for r in reports}) > 1:
        raise ValueError(
            "Reports were scored on different numbers of observations: "
            f"{[(r.name, r.n_observations) for r in reports]}"
        )
    return az.compare({r.name: r.to_elpd_data() for r in reports}, ic="loo", method="stacking")


def difference(a: LooReport, b: LooReport) -> Tuple[float, float]:
    """(elpd_a - elpd_b, standard error of the difference)."""
    table = rank_table([replace(a, name="a"), replace(b, name="b")])
    if table.index[0] == "a":
        return float(table.loc["b", "elpd_diff"]), float(table.loc["b", "dse"])
    return -float(table.loc["a", "elpd_diff"]), float(table.loc["a", "dse"])


def pairwise_order(a: LooReport, b: LooReport) -> int:
    """
    +1 if a is better than b, -1 if worse, 0 if within one standard error.

    Antisymmetric: pairwise_order(a, b) == -pairwise_order(b, a).
    """
    diff, se = difference(a, b)
    if abs(diff) < se or diff == 0:
        return 0
    return 1 if diff > 0 else -1


def _check_comparable(reports: Sequence[LooReport], allow_unreliable: bool) -> None:
    names = [r.name for r in reports]
    duplicated = sorted({n for n in names if names.count(n) > 1})
    if duplicated:
        raise ValueError(f"Report names must be unique: {duplicated}")

    hashes = {r.data_hash for r in reports}
    if len(hashes) > 1:
        raise ValueError("Reports were computed on different datasets and cannot be ranked")

    unreliable = [r.name for r in reports if not r.reliable]
    if unreliable and not allow_unreliable:
        raise UnreliableArtifactError(
            f"Refusing to rank unreliable fits {unreliable}; "
            f"refit them or pass allow_unreliable=True"
        )


def compare_models(
    reports: Sequence[LooReport],
    allow_unreliable: bool = False
) -> ComparisonResult:
    """
    Rank models by elpd_loo.

    Args:
        reports: LOO reports computed on the same dataset
        allow_unreliable: Rank unreliable fits anyway (they stay marked)

    Returns:
        ComparisonResult, best model first

    Raises:
        ValueError: Fewer than one report, duplicate names, or reports from
            different datasets
        UnreliableArtifactError: An unreliable report without the override
    """
    if not reports:
        raise ValueError("Nothing to compare")
    _check_comparable(reports, allow_unreliable)

    by_name = {r.name: r for r in reports}
    table = rank_table(reports)

    rows = []
    for rank, (name, entry) in enumerate(table.iterrows(), start=1):
        report = by_name[name]
        diff, se_diff = float(entry["elpd_diff"]), float(entry["dse"])
        if rank == 1:
            verdict = Verdict.BEST
        elif diff < se_diff or diff == 0:
            verdict = Verdict.INDISTINGUISHABLE
        else:
            verdict = Verdict.WORSE
        rows.append(ComparisonRow(
            name=report.name,
            rank=rank,
            elpd=report.elpd,
            se=report.se,
            elpd_diff=diff,
            se_diff=se_diff,
            p_loo=report.p_loo,
            n_flagged=report.n_flagged,
            verdict=verdict,
            weight=float(entry["weight"]),
            reliable=report.reliable,
        ))

    return ComparisonResult(rows=rows)
