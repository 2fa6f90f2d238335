"""
Relatedness deduplication for monozygotic twins.

Pairs of samples whose kinship coefficient exceeds the twin threshold are
treated as monozygotic twins and at most one member of each pair may stay in
the cohort.

Policy:
    - Exactly one member is a case: the other member is removed. These
      removals never touch a case, so they do not depend on pair order.
    - Both members are cases, or both are controls: resolved by the tie-break
      policy. ``lowest_id`` keeps the lexicographically smaller sample key,
      ``drop_both`` removes both. Each such decision is reported.

Pairs are processed in sorted order so the result never depends on the row
order of the kinship file.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

from .case_identification import CASE

logger = logging.getLogger(__name__)

# KING kinship > 2^-1.5 marks duplicates / monozygotic twins
MZ_TWIN_THRESHOLD = 0.354

TIE_BREAK_POLICIES = ("lowest_id", "drop_both")


def load_kinship(
    kinship_file: Path,
    id_cols: tuple[str, str] = ("ID1", "ID2"),
    kinship_col: str = "Kinship",
) -> pd.DataFrame:
    """
    Read a kinship table into memory.

    Returns:
        DataFrame with columns id1, id2, kinship.
    """
    kinship_file = Path(kinship_file)
    if kinship_file.suffix == ".parquet":
        kinship = pd.read_parquet(kinship_file)
    elif kinship_file.suffix == ".csv":
        kinship = pd.read_csv(kinship_file)
    else:
        kinship = pd.read_csv(kinship_file, sep=r"\s+")

    missing = [c for c in (*id_cols, kinship_col) if c not in kinship.columns]
    if missing:
        raise ValueError(
            f"Kinship file {kinship_file} is missing columns {missing}; "
            f"found {list(kinship.columns)}"
        )

    result = pd.DataFrame({
        "id1": kinship[id_cols[0]].astype(str),
        "id2": kinship[id_cols[1]].astype(str),
        "kinship": pd.to_numeric(kinship[kinship_col], errors="coerce"),
    })
    logger.info(f"Loaded {len(result)} kinship pairs from {kinship_file}")
    return result


@dataclass
class TieBreakDecision:
    """How one twin pair with matching labels was resolved."""

    sample_a: str
    sample_b: str
    labels: str
    kept: list[str]
    removed: list[str]


@dataclass
class DeduplicationReport:
    """Twin pairs found, samples removed and tie-break decisions."""

    threshold: float
    policy: str
    n_pairs_above_threshold: int = 0
    n_pairs_in_cohort: int = 0
    removed: list[dict] = field(default_factory=list)
    tie_breaks: list[TieBreakDecision] = field(default_factory=list)

    def removed_frame(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.removed,
            columns=["platekey", "participant_id", "label", "twin", "reason"],
        )

    def to_dict(self) -> dict:
        return {
            "threshold": self.threshold,
            "policy": self.policy,
            "n_pairs_above_threshold": self.n_pairs_above_threshold,
            "n_pairs_in_cohort": self.n_pairs_in_cohort,
            "n_removed": len(self.removed),
            "n_tie_breaks": len(self.tie_breaks),
            "tie_breaks": [d.__dict__ for d in self.tie_breaks],
        }


class TwinDeduplicator:
    """Removes one member of each monozygotic-twin pair from a cohort."""

    def __init__(
        self,
        threshold: float = MZ_TWIN_THRESHOLD,
        tie_break: str = "lowest_id",
        sample_col: str = "platekey",
    ):
        """
        Args:
            threshold: Kinship coefficient above which a pair is a twin pair.
            tie_break: Policy for pairs where both or neither are cases.
            sample_col: Cohort column holding the sample key used in the
                kinship table.
        """
        if tie_break not in TIE_BREAK_POLICIES:
            raise ValueError(f"tie_break must be one of {TIE_BREAK_POLICIES}")
        self.threshold = threshold
        self.tie_break = tie_break
        self.sample_col = sample_col

        logger.info(f"Twin deduplication: kinship > {threshold}, tie-break '{tie_break}'")

    def twin_pairs(self, kinship: pd.DataFrame) -> list[tuple[str, str]]:
        """Unordered pairs above threshold, de-duplicated and sorted."""
        related = kinship[kinship["kinship"] > self.threshold]
        pairs = {
            tuple(sorted((str(a), str(b))))
            for a, b in zip(related["id1"], related["id2"])
            if str(a) != str(b)
        }
        return sorted(pairs)

    def deduplicate(
        self,
        cohort: pd.DataFrame,
        kinship: pd.DataFrame,
    ) -> tuple[pd.DataFrame, DeduplicationReport]:
        """
        Remove twins from a labelled cohort.

        Args:
            cohort: DataFrame with ``sample_col``, participant_id and label.
            kinship: DataFrame with id1, id2, kinship (see load_kinship).

        Returns:
            Tuple of (deduplicated cohort, report).
        """
        report = DeduplicationReport(threshold=self.threshold, policy=self.tie_break)
        pairs = self.twin_pairs(kinship)
        report.n_pairs_above_threshold = len(pairs)
        logger.info(f"Found {len(pairs)} twin pairs above threshold")

        samples = cohort[self.sample_col].astype(str)
        labels = dict(zip(samples, cohort["label"]))
        participants = dict(zip(samples, cohort["participant_id"].astype(str)))

        to_remove = {}

        def remove(sample, twin, reason):
            if sample not in to_remove:
                to_remove[sample] = {
                    "platekey": sample,
                    "participant_id": participants[sample],
                    "label": labels[sample],
                    "twin": twin,
                    "reason": reason,
                }

        in_cohort = [(a, b) for a, b in pairs if a in labels or b in labels]
        report.n_pairs_in_cohort = len(in_cohort)

        # Pass 1: exactly one case; the non-case twin goes
        ambiguous = []
        for a, b in in_cohort:
            a_case = labels.get(a) == CASE
            b_case = labels.get(b) == CASE
            if a_case != b_case:
                other = b if a_case else a
                if other in labels:
                    remove(other, a if a_case else b, "twin_of_case")
            elif a in labels and b in labels:
                ambiguous.append((a, b))

        # Pass 2: both or neither are cases
        for a, b in ambiguous:
            if a in to_remove or b in to_remove:
                continue
            pair_labels = f"{labels[a]}/{labels[b]}"
            if self.tie_break == "lowest_id":
                kept, removed = [a], [b]
            else:
                kept, removed = [], [a, b]
            for sample in removed:
                remove(sample, b if sample == a else a, f"tie_break:{self.tie_break}")
            report.tie_breaks.append(TieBreakDecision(a, b, pair_labels, kept, removed))
            logger.warning(
                f"Twin pair {a}/{b} ({pair_labels}) resolved by '{self.tie_break}': "
                f"removed {removed}"
            )

        report.removed = list(to_remove.values())
        result = cohort[~samples.isin(set(to_remove))].copy()

        logger.info(
            f"Twin deduplication: {len(cohort)} -> {len(result)} "
            f"({len(to_remove)} removed, {len(report.tie_breaks)} tie-breaks)"
        )
        return result, report
