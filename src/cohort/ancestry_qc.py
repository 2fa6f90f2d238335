"""
Ancestry and Sample Quality Control Module

Restricts the labelled cohort to a genetically homogeneous, well-characterised
set of samples:

    1. Join to the aggregate variant-call sample stats (platekey, karyotype,
       predicted ancestry scores). Participants without a sample there drop out.
    2. Assign a discrete ancestry label where one population score is >= 0.8;
       otherwise the participant is "Admixed". Keep the target ancestry only.
    3. Keep XX/XY karyotypes whose phenotypic sex agrees with the karyotype.
    4. Keep samples whose provenance (source, extraction, library prep)
       matches the requested values.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd

from warehouse.queries import ANCESTRY_COLUMNS

logger = logging.getLogger(__name__)

ADMIXED = "Admixed"
UNKNOWN = "Unknown"

# Phenotypic sex expected for each accepted karyotype
KARYOTYPE_SEX = {"XX": "Female", "XY": "Male"}


def assign_ancestry(scores: pd.DataFrame, threshold: float = 0.8) -> pd.Series:
    """
    Assign one ancestry label per row of population scores.

    Args:
        scores: One column per population label (e.g. EUR, SAS), values
            are predicted probabilities.
        threshold: Minimum score required to assign a population.

    Returns:
        Series of labels aligned to ``scores.index``: the best-scoring
        population when its score is >= threshold, "Admixed" when no score
        reaches it, "Unknown" when every score is missing.
    """
    if scores.empty:
        return pd.Series(dtype=object, index=scores.index)

    numeric = scores.apply(pd.to_numeric, errors="coerce")
    all_missing = numeric.isna().all(axis=1)
    best_score = numeric.max(axis=1)
    best_label = numeric.fillna(-np.inf).idxmax(axis=1)

    labels = pd.Series(ADMIXED, index=scores.index, dtype=object)
    assigned = best_score >= threshold
    labels[assigned] = best_label[assigned]
    labels[all_missing] = UNKNOWN
    return labels


class AncestryQC:
    """Ancestry, karyotype and provenance filters for the labelled cohort."""

    DEFAULT_KARYOTYPES = ["XX", "XY"]

    def __init__(
        self,
        target_ancestry: Optional[str] = "EUR",
        ancestry_threshold: float = 0.8,
        allowed_karyotypes: Optional[list[str]] = None,
        provenance: Optional[dict] = None,
    ):
        """
        Initialize ancestry QC.

        Args:
            target_ancestry: Ancestry label to retain. None keeps every
                assigned (non-admixed) ancestry.
            ancestry_threshold: Score needed to assign an ancestry label.
            allowed_karyotypes: Karyotypes retained (subset of XX, XY).
            provenance: Required sample provenance as column -> value(s).
        """
        self.target_ancestry = target_ancestry
        self.threshold = ancestry_threshold
        self.allowed_karyotypes = allowed_karyotypes or self.DEFAULT_KARYOTYPES
        self.provenance = dict(provenance or {})

        unsupported = set(self.allowed_karyotypes) - set(KARYOTYPE_SEX)
        if unsupported:
            raise ValueError(f"Unsupported karyotypes: {sorted(unsupported)}")

        logger.info("Ancestry QC initialized:")
        logger.info(f"  Target ancestry: {self.target_ancestry} (score >= {self.threshold})")
        logger.info(f"  Karyotypes: {self.allowed_karyotypes}")
        logger.info(f"  Provenance requirements: {self.provenance}")

    def load_sample_stats(self, service) -> pd.DataFrame:
        """
        Fetch sample stats and derive the ancestry label.

        Returns:
            DataFrame with participant_id, platekey, karyotype, one score
            column per population and an ``ancestry`` label.
        """
        df = service.execute_template("aggregate_sample_stats")
        if df.empty:
            logger.warning("No rows returned from the aggregate sample stats")
            return pd.DataFrame(
                columns=["participant_id", "platekey", "karyotype"]
                + list(ANCESTRY_COLUMNS.values()) + ["ancestry"]
            )

        df = df.rename(columns=ANCESTRY_COLUMNS).copy()
        df["participant_id"] = df["participant_id"].astype(str)
        score_cols = [c for c in ANCESTRY_COLUMNS.values() if c in df.columns]
        df["ancestry"] = assign_ancestry(df[score_cols], self.threshold)

        logger.info(f"Loaded sample stats for {len(df)} samples")
        return df

    def attach_sample_stats(
        self,
        cohort: pd.DataFrame,
        sample_stats: pd.DataFrame,
    ) -> pd.DataFrame:
        """
        Inner-join the cohort to one sample per participant.

        Participants with several samples keep the first platekey in sorted
        order. Participants without a sample drop out.
        """
        n_before = len(cohort)

        stats = sample_stats.sort_values(["participant_id", "platekey"])
        n_multi = stats["participant_id"].duplicated().sum()
        if n_multi:
            logger.info(f"  {n_multi} extra samples for participants with several platekeys ignored")
        stats = stats.drop_duplicates("participant_id")

        overlap = [c for c in stats.columns if c in cohort.columns and c != "participant_id"]
        result = cohort.drop(columns=overlap).merge(stats, on="participant_id", how="inner")

        n_after = len(result)
        logger.info(
            f"Aggregate sample stats join: {n_before} -> {n_after} "
            f"({n_before - n_after} without a sample removed)"
        )
        return result

    def filter_ancestry(self, cohort: pd.DataFrame) -> pd.DataFrame:
        """Keep the target ancestry; admixed and unknown are always removed."""
        n_before = len(cohort)

        if self.target_ancestry is None:
            mask = ~cohort["ancestry"].isin([ADMIXED, UNKNOWN])
        else:
            mask = cohort["ancestry"] == self.target_ancestry
        result = cohort[mask].copy()

        n_after = len(result)
        logger.info(
            f"Ancestry filter ({self.target_ancestry or 'any assigned'}): "
            f"{n_before} -> {n_after} ({n_before - n_after} removed)"
        )
        n_admixed = (cohort["ancestry"] == ADMIXED).sum()
        if n_admixed:
            logger.info(f"  {n_admixed} admixed participants excluded")
        return result

    def filter_karyotype(self, cohort: pd.DataFrame) -> pd.DataFrame:
        """Keep allowed karyotypes whose phenotypic sex agrees with them."""
        n_before = len(cohort)

        karyotype = cohort["karyotype"].astype(str).str.upper()
        expected_sex = karyotype.map(KARYOTYPE_SEX)
        sex = cohort["phenotypic_sex"].astype(str).str.strip().str.capitalize()

        mask = karyotype.isin(self.allowed_karyotypes) & (sex == expected_sex)
        result = cohort[mask].copy()

        n_after = len(result)
        logger.info(
            f"Karyotype/sex concordance filter: {n_before} -> {n_after} "
            f"({n_before - n_after} removed)"
        )
        return result

    def load_provenance(self, service) -> pd.DataFrame:
        """Fetch the provenance columns named in the requirements."""
        columns = sorted(self.provenance)
        df = service.execute_template("sample_provenance", columns=columns)
        if df.empty:
            return pd.DataFrame(columns=["participant_id", "platekey"] + columns)
        df = df.copy()
        df["participant_id"] = df["participant_id"].astype(str)
        return df

    def filter_provenance(
        self,
        cohort: pd.DataFrame,
        provenance: pd.DataFrame,
    ) -> pd.DataFrame:
        """
        Keep samples whose provenance matches every requirement.

        Samples are matched on platekey. A requirement value may be a
        single value or a list of accepted values.
        """
        if not self.provenance:
            logger.info("No provenance requirements; skipping provenance filter")
            return cohort

        n_before = len(cohort)

        mask = pd.Series(True, index=provenance.index)
        for column, accepted in self.provenance.items():
            if column not in provenance.columns:
                raise ValueError(f"Provenance column not returned: {column}")
            if isinstance(accepted, (list, tuple, set)):
                accepted = [str(v) for v in accepted]
            else:
                accepted = [str(accepted)]
            col_mask = provenance[column].astype(str).isin(accepted)
            logger.info(f"  {column} in {accepted}: {col_mask.sum()} samples")
            mask &= col_mask

        passing = set(provenance.loc[mask, "platekey"].astype(str))
        result = cohort[cohort["platekey"].astype(str).isin(passing)].copy()

        n_after = len(result)
        logger.info(
            f"Provenance filter: {n_before} -> {n_after} "
            f"({n_before - n_after} removed)"
        )
        return result

    def get_qc_summary(self, cohort: pd.DataFrame) -> dict:
        """Ancestry and karyotype distributions of a cohort."""
        return {
            "n_samples": int(len(cohort)),
            "ancestry_distribution": {
                str(k): int(v) for k, v in cohort["ancestry"].value_counts().items()
            },
            "karyotype_distribution": {
                str(k): int(v) for k, v in cohort["karyotype"].value_counts().items()
            },
        }
