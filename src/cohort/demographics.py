"""
Demographic summary and operator review.

Case and control groups are compared on mean birth year and on sex
(phenotypic/karyotypic concordance, XX and XY proportions). There is no
automatic acceptance threshold: the summary is shown to an operator who must
confirm it before the cohort is refined further.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import pandas as pd

from .ancestry_qc import KARYOTYPE_SEX
from .case_identification import CASE, CONTROL

logger = logging.getLogger(__name__)


class DemographicReviewRejected(RuntimeError):
    """The operator did not accept the demographic summary."""

    def __init__(self, summary: "DemographicSummary"):
        super().__init__("Demographic match was rejected at review")
        self.summary = summary


@dataclass
class GroupDemographics:
    """Demographics of one label group; proportions are None when unavailable."""

    label: str
    n: int
    mean_year_of_birth: Optional[float]
    sex_concordance: Optional[float]
    prop_xx: Optional[float]
    prop_xy: Optional[float]


@dataclass
class DemographicSummary:
    """Case and control demographics shown to the operator for review."""

    groups: list[GroupDemographics] = field(default_factory=list)

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame([g.__dict__ for g in self.groups]).set_index("label")

    def to_dict(self) -> dict:
        out = {}
        for g in self.groups:
            out[g.label] = {
                k: (None if v is None else (int(v) if k == "n" else round(float(v), 4)))
                for k, v in g.__dict__.items()
                if k != "label"
            }
        return out

    def format(self) -> str:
        """Plain-text table for review."""
        lines = [
            f"{'group':<10}{'n':>8}{'mean YOB':>12}{'sex conc.':>12}{'XX':>8}{'XY':>8}"
        ]
        for g in self.groups:
            def fmt(value, spec):
                return "NA" if value is None else format(value, spec)

            lines.append(
                f"{g.label:<10}{g.n:>8}"
                f"{fmt(g.mean_year_of_birth, '.1f'):>12}"
                f"{fmt(g.sex_concordance, '.3f'):>12}"
                f"{fmt(g.prop_xx, '.3f'):>8}"
                f"{fmt(g.prop_xy, '.3f'):>8}"
            )
        return "\n".join(lines)


def _mean_or_none(series: pd.Series) -> Optional[float]:
    values = pd.to_numeric(series, errors="coerce").dropna()
    return float(values.mean()) if len(values) else None


def _group_stats(label: str, df: pd.DataFrame) -> GroupDemographics:
    n = len(df)
    if n == 0:
        return GroupDemographics(label, 0, None, None, None, None)

    mean_yob = _mean_or_none(df["year_of_birth"]) if "year_of_birth" in df.columns else None

    sex_concordance = prop_xx = prop_xy = None
    if "karyotype" in df.columns:
        karyotype = df["karyotype"].astype(str).str.upper()
        prop_xx = float((karyotype == "XX").mean())
        prop_xy = float((karyotype == "XY").mean())
        if "phenotypic_sex" in df.columns:
            sex = df["phenotypic_sex"].astype(str).str.strip().str.capitalize()
            sex_concordance = float((karyotype.map(KARYOTYPE_SEX) == sex).mean())

    return GroupDemographics(label, n, mean_yob, sex_concordance, prop_xx, prop_xy)


def summarise(cohort: pd.DataFrame) -> DemographicSummary:
    """Per-label demographic summary of a labelled cohort."""
    summary = DemographicSummary()
    for label in (CASE, CONTROL):
        summary.groups.append(_group_stats(label, cohort[cohort["label"] == label]))

    logger.info("Demographic summary:")
    for line in summary.format().splitlines():
        logger.info(f"  {line}")
    return summary


def require_confirmation(
    summary: DemographicSummary,
    confirm: Callable[[DemographicSummary], bool],
) -> None:
    """Ask the operator to accept the summary; raise if they decline."""
    if confirm is None:
        raise ValueError("A confirmation callback is required for demographic review")

    if not confirm(summary):
        logger.error("Demographic summary rejected by operator")
        raise DemographicReviewRejected(summary)

    logger.info("Demographic summary accepted by operator")
