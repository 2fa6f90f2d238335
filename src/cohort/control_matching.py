"""
Control Matching Module

Optional nearest-neighbor matching of controls to cases on year of birth and
sex, applied after the control pool has been filtered.

Matching Strategy:
    - k:1 control-to-case ratio
    - Matching without replacement
    - Variables: year_of_birth, sex (Female=0, Male=1)

Balance is reported as standardized mean differences for review; it is not
used to reject the cohort.
"""

import logging
from typing import Optional

import numpy as np
import pandas as pd
from scipy.spatial.distance import cdist
from sklearn.preprocessing import StandardScaler

from .case_identification import CASE, CONTROL

logger = logging.getLogger(__name__)

SEX_CODES = {"Female": 0, "Male": 1}


def encode_sex(sex: pd.Series) -> pd.Series:
    """Map phenotypic sex to 0/1; other values become NaN."""
    return sex.astype(str).str.strip().str.capitalize().map(SEX_CODES).astype(float)


class ControlMatcher:
    """Performs nearest-neighbor matching of controls to cases."""

    DEFAULT_MATCHING_VARS = ["year_of_birth", "sex"]

    def __init__(
        self,
        controls_per_case: int = 4,
        matching_variables: Optional[list[str]] = None,
        caliper: Optional[float] = None,
        random_seed: int = 42,
    ):
        """
        Initialize control matcher.

        Args:
            controls_per_case: Number of controls to match per case.
            matching_variables: Variables to match on.
            caliper: Maximum allowed distance (in SD units) for matches.
            random_seed: Random seed for reproducibility.
        """
        self.n_controls = controls_per_case
        self.matching_vars = matching_variables or self.DEFAULT_MATCHING_VARS
        self.caliper = caliper
        self.random_seed = random_seed

        logger.info("Control matcher initialized:")
        logger.info(f"  Controls per case: {self.n_controls}")
        logger.info(f"  Matching variables: {self.matching_vars}")
        logger.info(f"  Caliper: {self.caliper}")

    def prepare_matching_data(self, cohort: pd.DataFrame) -> pd.DataFrame:
        """Add numeric matching columns (sex code) to a labelled cohort."""
        df = cohort.copy()
        if "sex" in self.matching_vars and "phenotypic_sex" in df.columns:
            df["sex"] = encode_sex(df["phenotypic_sex"])
        if "year_of_birth" in df.columns:
            df["year_of_birth"] = pd.to_numeric(df["year_of_birth"], errors="coerce")

        missing_vars = [v for v in self.matching_vars if v not in df.columns]
        if missing_vars:
            logger.warning(f"Missing matching variables: {missing_vars}")

        return df

    def _standardize_features(
        self,
        cases_df: pd.DataFrame,
        controls_df: pd.DataFrame,
        variables: list[str],
    ) -> tuple[np.ndarray, np.ndarray, StandardScaler]:
        """
        Standardize matching features.

        Missing values are imputed with the pooled mean before scaling.
        """
        case_features = cases_df[variables].to_numpy(dtype=float, copy=True)
        control_features = controls_df[variables].to_numpy(dtype=float, copy=True)

        for i in range(len(variables)):
            all_values = np.concatenate([case_features[:, i], control_features[:, i]])
            mean_val = np.nanmean(all_values) if np.isfinite(all_values).any() else 0.0
            case_features[:, i] = np.where(
                np.isnan(case_features[:, i]), mean_val, case_features[:, i]
            )
            control_features[:, i] = np.where(
                np.isnan(control_features[:, i]), mean_val, control_features[:, i]
            )

        scaler = StandardScaler()
        scaler.fit(np.vstack([case_features, control_features]))

        return scaler.transform(case_features), scaler.transform(control_features), scaler

    def match_controls(
        self,
        matching_df: pd.DataFrame,
    ) -> tuple[pd.DataFrame, pd.DataFrame]:
        """
        Perform nearest-neighbor matching.

        Args:
            matching_df: Labelled cohort with matching variables.

        Returns:
            Tuple of (matched_cohort, matching_info).
                - matched_cohort: all cases plus matched controls
                - matching_info: case/control pairs with distance and rank
        """
        cases_df = matching_df[matching_df["label"] == CASE].copy()
        controls_df = matching_df[matching_df["label"] == CONTROL].copy()

        n_cases = len(cases_df)
        n_controls = len(controls_df)
        info_cols = ["case_id", "control_id", "match_rank", "distance"]

        logger.info(f"Matching {n_cases} cases to {n_controls} potential controls")
        logger.info(f"Target: {self.n_controls} controls per case")

        if n_cases == 0 or n_controls == 0:
            logger.warning("Nothing to match; returning cases only")
            return cases_df, pd.DataFrame(columns=info_cols)

        required_controls = n_cases * self.n_controls
        if n_controls < required_controls:
            effective_ratio = max(n_controls // n_cases, 1)
            logger.warning(
                f"Insufficient controls ({n_controls}) for {required_controls} "
                f"required matches. Will match {effective_ratio} per case."
            )
        else:
            effective_ratio = self.n_controls

        available_vars = [v for v in self.matching_vars if v in matching_df.columns]
        if not available_vars:
            raise ValueError("No matching variables available in data")

        case_features, control_features, _ = self._standardize_features(
            cases_df, controls_df, available_vars
        )

        logger.info("Computing pairwise distances...")
        distances = cdist(case_features, control_features, metric="euclidean")

        # Greedy matching; cases take turns in a seeded random order
        rng = np.random.default_rng(self.random_seed)
        case_order = rng.permutation(n_cases)

        matching_records = []
        available_controls = set(range(n_controls))
        case_ids = cases_df["participant_id"].to_numpy()
        control_ids = controls_df["participant_id"].to_numpy()

        for i in case_order:
            if not available_controls:
                logger.warning("Ran out of controls before every case was matched")
                break

            available_list = sorted(available_controls)
            case_distances = distances[i, available_list]

            n_to_match = min(effective_ratio, len(available_list))
            nearest_indices = np.argsort(case_distances, kind="stable")[:n_to_match]

            if self.caliper is not None:
                nearest_indices = [
                    idx for idx in nearest_indices
                    if case_distances[idx] <= self.caliper
                ]

            for rank, local_idx in enumerate(nearest_indices):
                global_idx = available_list[local_idx]
                matching_records.append({
                    "case_id": case_ids[i],
                    "control_id": control_ids[global_idx],
                    "match_rank": rank + 1,
                    "distance": float(case_distances[local_idx]),
                })
                available_controls.discard(global_idx)

        matching_info = pd.DataFrame(matching_records, columns=info_cols)

        matched_control_ids = set(matching_info["control_id"])
        matched_controls = controls_df[controls_df["participant_id"].isin(matched_control_ids)]
        matched_cohort = pd.concat([cases_df, matched_controls], ignore_index=True)

        n_matched_controls = len(matched_controls)
        logger.info("Matching complete:")
        logger.info(f"  Matched cases: {n_cases}")
        logger.info(f"  Matched controls: {n_matched_controls}")
        logger.info(f"  Actual ratio: {n_matched_controls / n_cases:.2f}:1")
        if len(matching_info):
            logger.info(f"  Mean distance: {matching_info['distance'].mean():.3f}")
            logger.info(f"  Max distance: {matching_info['distance'].max():.3f}")

        return matched_cohort, matching_info

    def assess_balance(self, cohort: pd.DataFrame) -> dict:
        """
        Covariate balance between cases and controls.

        Returns:
            Dictionary of per-variable means, SDs and standardized mean
            differences. ``flagged`` marks |SMD| >= 0.1 for the reviewer.
        """
        cases = cohort[cohort["label"] == CASE]
        controls = cohort[cohort["label"] == CONTROL]

        balance = {}
        for var in self.matching_vars:
            if var not in cohort.columns:
                continue

            case_mean = cases[var].mean()
            control_mean = controls[var].mean()
            case_std = cases[var].std()
            control_std = controls[var].std()

            pooled_std = np.sqrt((case_std**2 + control_std**2) / 2)
            smd = (case_mean - control_mean) / pooled_std if pooled_std > 0 else 0.0

            balance[var] = {
                "case_mean": float(case_mean),
                "control_mean": float(control_mean),
                "case_std": float(case_std),
                "control_std": float(control_std),
                "standardized_mean_diff": float(smd),
                "flagged": bool(abs(smd) >= 0.1),
            }

        logger.info("Covariate balance assessment:")
        for var, stats in balance.items():
            status = "REVIEW" if stats["flagged"] else "OK"
            logger.info(f"  {var}: SMD = {stats['standardized_mean_diff']:.3f} [{status}]")

        return balance
