"""
Cohort Builder - Main orchestration module

Coordinates candidate collection, exclusion, demographic review, ancestry and
sample QC, optional control matching, twin deduplication and file path
resolution to build a case/control cohort from a warehouse release.

Outputs:
    - cohort.parquet: Final cohort with labels, covariates and file paths
    - funnel.parquet: Participant counts after every stage
    - twins_removed.parquet: Samples removed by twin deduplication
    - unresolved_paths.parquet: Cohort members without a file
    - file_paths.txt: One file path per line
    - cohort_qc_report.yaml: Demographics, balance and stage reports
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

import numpy as np
import pandas as pd
import yaml

from .ancestry_qc import AncestryQC
from .case_identification import (
    CASE,
    CONTROL,
    CandidateCollector,
    EvidenceCriteria,
    ExclusionFilter,
    label_participants,
)
from .control_matching import ControlMatcher
from .demographics import DemographicSummary, require_confirmation, summarise
from .file_paths import FilePathResolver, export_path_list
from .relatedness import MZ_TWIN_THRESHOLD, TwinDeduplicator, load_kinship

logger = logging.getLogger(__name__)


@dataclass
class CohortConfig:
    """Configuration for cohort building."""

    _DEFAULT_MATCHING_VARS = ["year_of_birth", "sex"]

    # Case identification
    case_criteria: EvidenceCriteria = field(default_factory=EvidenceCriteria)
    exclusion_criteria: EvidenceCriteria = field(default_factory=EvidenceCriteria)

    # Ancestry and sample QC
    target_ancestry: Optional[str] = "EUR"
    ancestry_threshold: float = 0.8
    allowed_karyotypes: list[str] = field(default_factory=lambda: ["XX", "XY"])
    provenance: dict = field(default_factory=dict)

    # Control matching (disabled when controls_per_case is None)
    controls_per_case: Optional[int] = None
    matching_variables: list[str] = field(
        default_factory=lambda: ["year_of_birth", "sex"]
    )
    matching_caliper: Optional[float] = None

    # Relatedness
    kinship_file: Optional[str] = None
    kinship_id_cols: list[str] = field(default_factory=lambda: ["ID1", "ID2"])
    kinship_col: str = "Kinship"
    twin_threshold: float = MZ_TWIN_THRESHOLD
    twin_tie_break: str = "lowest_id"

    # File paths (skipped when file_category is None)
    file_category: Optional[str] = "Standard VCF"
    path_join_key: str = "platekey"

    # Output
    output_dir: Optional[str] = "data/cohort"
    save_intermediate: bool = True

    @classmethod
    def from_yaml(cls, config_file: Path) -> "CohortConfig":
        """Load configuration from YAML file."""
        with open(config_file) as f:
            config = yaml.safe_load(f) or {}

        case_cfg = config.get("case_identification", {})
        ancestry_cfg = config.get("ancestry_qc", {})
        matching_cfg = config.get("control_matching", {})
        kinship_cfg = config.get("relatedness", {})
        paths_cfg = config.get("file_paths", {})
        output_cfg = config.get("output", {})

        return cls(
            case_criteria=EvidenceCriteria.from_dict(case_cfg.get("cases")),
            exclusion_criteria=EvidenceCriteria.from_dict(case_cfg.get("exclusions")),
            target_ancestry=ancestry_cfg.get("target_ancestry", "EUR"),
            ancestry_threshold=ancestry_cfg.get("threshold", 0.8),
            allowed_karyotypes=ancestry_cfg.get("karyotypes", ["XX", "XY"]),
            provenance=ancestry_cfg.get("provenance", {}),
            controls_per_case=matching_cfg.get("controls_per_case"),
            matching_variables=matching_cfg.get(
                "matching_variables", cls._DEFAULT_MATCHING_VARS
            ),
            matching_caliper=matching_cfg.get("caliper"),
            kinship_file=kinship_cfg.get("kinship_file"),
            kinship_id_cols=kinship_cfg.get("id_columns", ["ID1", "ID2"]),
            kinship_col=kinship_cfg.get("kinship_column", "Kinship"),
            twin_threshold=kinship_cfg.get("twin_threshold", MZ_TWIN_THRESHOLD),
            twin_tie_break=kinship_cfg.get("tie_break", "lowest_id"),
            file_category=paths_cfg.get("file_category", "Standard VCF"),
            path_join_key=paths_cfg.get("join_key", "platekey"),
            output_dir=output_cfg.get("directory", "data/cohort"),
            save_intermediate=output_cfg.get("save_intermediate", True),
        )


class CohortBuilder:
    """
    Main class for building a case/control cohort.

    This class orchestrates the full pipeline:
    1. Collect candidate cases from evidence queries
    2. Build the exclusion set and the control population
    3. Join to aggregate sample stats and review demographics
    4. Apply ancestry, karyotype and provenance filters
    5. Optionally match controls to cases
    6. Remove monozygotic twins
    7. Resolve genomic file paths
    """

    def __init__(self, service, config: Optional[CohortConfig] = None):
        """
        Initialize cohort builder.

        Args:
            service: Query service bound to a warehouse release.
            config: Cohort configuration. Uses defaults if not provided.
        """
        self.service = service
        self.config = config or CohortConfig()
        self.output_dir = Path(self.config.output_dir) if self.config.output_dir else None

        self.collector = CandidateCollector(service)
        self.exclusion_filter = ExclusionFilter(service, self.collector)

        self.ancestry_qc = AncestryQC(
            target_ancestry=self.config.target_ancestry,
            ancestry_threshold=self.config.ancestry_threshold,
            allowed_karyotypes=self.config.allowed_karyotypes,
            provenance=self.config.provenance,
        )

        self.control_matcher = None
        if self.config.controls_per_case:
            self.control_matcher = ControlMatcher(
                controls_per_case=self.config.controls_per_case,
                matching_variables=self.config.matching_variables,
                caliper=self.config.matching_caliper,
            )

        self.deduplicator = TwinDeduplicator(
            threshold=self.config.twin_threshold,
            tie_break=self.config.twin_tie_break,
        )
        self.path_resolver = FilePathResolver(service, join_key=self.config.path_join_key)

        self.funnel: list[dict] = []

        logger.info("CohortBuilder initialized with configuration:")
        logger.info(f"  Output directory: {self.output_dir}")

    def _record(self, stage: str, cohort: pd.DataFrame) -> None:
        n_cases = int((cohort["label"] == CASE).sum()) if "label" in cohort.columns else 0
        n_controls = int((cohort["label"] == CONTROL).sum()) if "label" in cohort.columns else 0
        n_before = self.funnel[-1]["n_after"] if self.funnel else len(cohort)
        self.funnel.append({
            "stage": stage,
            "n_before": int(n_before),
            "n_after": int(len(cohort)),
            "n_cases": n_cases,
            "n_controls": n_controls,
        })
        logger.info(f"  Cases: {n_cases}")
        logger.info(f"  Controls: {n_controls}")

    def build_cohort(
        self,
        confirm: Callable[[DemographicSummary], bool],
        kinship: Optional[pd.DataFrame] = None,
    ) -> dict:
        """
        Build the case/control cohort.

        Args:
            confirm: Operator callback shown the demographic summary; must
                return True for the build to continue.
            kinship: Optional kinship table (id1, id2, kinship). Loaded from
                ``config.kinship_file`` when not given.

        Returns:
            Dictionary with:
                - cohort: Final cohort DataFrame
                - funnel: Stage counts DataFrame
                - demographics: DemographicSummary
                - balance: Covariate balance dict
                - matching_info: Case/control pairs (empty if not matched)
                - deduplication: DeduplicationReport or None
                - path_resolution: PathResolutionReport or None
                - unresolved_paths: DataFrame of keys without a file

        Raises:
            DemographicReviewRejected: The operator declined the summary.
            ValueError: No confirmation callback was given.
        """
        if confirm is None:
            raise ValueError("A confirmation callback is required for demographic review")

        self.funnel = []
        n_steps = 7

        logger.info("=" * 60)
        logger.info("Starting cohort building pipeline")
        logger.info("=" * 60)

        # Step 1: Candidate cases
        logger.info(f"\n[Step 1/{n_steps}] Collecting candidate cases...")
        cases = self.collector.collect(self.config.case_criteria)

        # Step 2: Exclusions and controls
        logger.info(f"\n[Step 2/{n_steps}] Building exclusion set and control population...")
        exclusion = self.exclusion_filter.exclusion_set(self.config.exclusion_criteria)
        universe = self.exclusion_filter.fetch_universe()
        n_universe_cases = int(universe["participant_id"].isin(cases).sum())
        self.funnel.append({
            "stage": "universe",
            "n_before": int(len(universe)),
            "n_after": int(len(universe)),
            "n_cases": n_universe_cases,
            "n_controls": int(len(universe)) - n_universe_cases,
        })
        controls = self.exclusion_filter.control_population(
            universe["participant_id"], exclusion, cases
        )
        cohort = label_participants(universe, cases, controls)
        self._record("minus_exclusion", cohort)

        # Step 3: Sample stats and demographic review
        logger.info(f"\n[Step 3/{n_steps}] Joining sample stats and reviewing demographics...")
        sample_stats = self.ancestry_qc.load_sample_stats(self.service)
        cohort = self.ancestry_qc.attach_sample_stats(cohort, sample_stats)
        self._record("aggregate_samples", cohort)

        demographics = summarise(cohort)
        require_confirmation(demographics, confirm)

        # Step 4: Ancestry, karyotype, provenance
        logger.info(f"\n[Step 4/{n_steps}] Applying ancestry and sample QC...")
        cohort = self.ancestry_qc.filter_ancestry(cohort)
        self._record("ancestry", cohort)
        cohort = self.ancestry_qc.filter_karyotype(cohort)
        self._record("karyotype", cohort)
        if self.config.provenance:
            provenance = self.ancestry_qc.load_provenance(self.service)
            cohort = self.ancestry_qc.filter_provenance(cohort, provenance)
            self._record("provenance", cohort)

        # Step 5: Control matching
        matching_info = pd.DataFrame(columns=["case_id", "control_id", "match_rank", "distance"])
        balance = {}
        if self.control_matcher is not None:
            logger.info(f"\n[Step 5/{n_steps}] Matching controls to cases...")
            matching_df = self.control_matcher.prepare_matching_data(cohort)
            cohort, matching_info = self.control_matcher.match_controls(matching_df)
            balance = self.control_matcher.assess_balance(cohort)
            self._record("matching", cohort)
        else:
            logger.info(f"\n[Step 5/{n_steps}] Skipping control matching")

        # Step 6: Twin deduplication
        dedup_report = None
        if kinship is None and self.config.kinship_file:
            kinship = load_kinship(
                Path(self.config.kinship_file),
                id_cols=tuple(self.config.kinship_id_cols),
                kinship_col=self.config.kinship_col,
            )
        if kinship is not None:
            logger.info(f"\n[Step 6/{n_steps}] Removing monozygotic twins...")
            cohort, dedup_report = self.deduplicator.deduplicate(cohort, kinship)
            self._record("twin_deduplication", cohort)
        else:
            logger.info(f"\n[Step 6/{n_steps}] Skipping twin deduplication (no kinship table)")

        # Step 7: File paths
        path_report = None
        unresolved = pd.DataFrame(columns=[self.config.path_join_key])
        if self.config.file_category:
            logger.info(f"\n[Step 7/{n_steps}] Resolving '{self.config.file_category}' paths...")
            cohort, path_report = self.path_resolver.resolve(cohort, self.config.file_category)
            unresolved = pd.DataFrame({self.config.path_join_key: path_report.unresolved})
            self._record("file_paths", cohort)
        else:
            logger.info(f"\n[Step 7/{n_steps}] Skipping file path resolution")

        final_cohort = self._finalize_cohort(cohort)
        funnel = pd.DataFrame(self.funnel)

        results = {
            "cohort": final_cohort,
            "funnel": funnel,
            "demographics": demographics,
            "balance": balance,
            "matching_info": matching_info,
            "deduplication": dedup_report,
            "path_resolution": path_report,
            "unresolved_paths": unresolved,
        }

        if self.output_dir is not None:
            self._save_outputs(results)
            self._generate_qc_report(results)

        logger.info("=" * 60)
        logger.info("Cohort building complete!")
        logger.info("=" * 60)

        return results

    def _finalize_cohort(self, cohort: pd.DataFrame) -> pd.DataFrame:
        """Select and order the final cohort columns."""
        preferred = [
            "participant_id", "platekey", "label", "year_of_birth",
            "phenotypic_sex", "karyotype", "ancestry",
            "filename", "file_path",
        ]
        columns = [c for c in preferred if c in cohort.columns]
        final = cohort[columns].copy()
        final["is_case"] = final["label"] == CASE
        return final.sort_values(["label", "participant_id"]).reset_index(drop=True)

    def _save_outputs(self, results: dict) -> None:
        """Save output files."""
        self.output_dir.mkdir(parents=True, exist_ok=True)

        cohort_path = self.output_dir / "cohort.parquet"
        results["cohort"].to_parquet(cohort_path, index=False)
        logger.info(f"Saved cohort to {cohort_path}")

        if self.config.save_intermediate:
            funnel_path = self.output_dir / "funnel.parquet"
            results["funnel"].to_parquet(funnel_path, index=False)
            logger.info(f"Saved stage counts to {funnel_path}")

            if len(results["matching_info"]):
                results["matching_info"].to_parquet(
                    self.output_dir / "matching_info.parquet", index=False
                )
            if results["deduplication"] is not None:
                results["deduplication"].removed_frame().to_parquet(
                    self.output_dir / "twins_removed.parquet", index=False
                )
            results["unresolved_paths"].to_parquet(
                self.output_dir / "unresolved_paths.parquet", index=False
            )

        if "file_path" in results["cohort"].columns:
            export_path_list(results["cohort"], self.output_dir / "file_paths.txt")

    def _generate_qc_report(self, results: dict) -> None:
        """Generate and save QC report."""

        def to_python(val):
            """Convert numpy types to Python native types."""
            if isinstance(val, np.integer):
                return int(val)
            elif isinstance(val, np.floating):
                return float(val)
            elif isinstance(val, np.bool_):
                return bool(val)
            elif isinstance(val, np.ndarray):
                return val.tolist()
            return val

        cohort = results["cohort"]
        n_cases = int((cohort["label"] == CASE).sum())
        n_controls = int((cohort["label"] == CONTROL).sum())
        ratio = n_controls / n_cases if n_cases > 0 else 0

        report = {
            "cohort_summary": {
                "database_version": getattr(
                    getattr(self.service, "config", None), "database_version", None
                ),
                "total_samples": int(len(cohort)),
                "n_cases": n_cases,
                "n_controls": n_controls,
                "control_case_ratio": float(round(ratio, 2)),
            },
            "funnel": [
                {k: to_python(v) for k, v in row.items()}
                for row in results["funnel"].to_dict(orient="records")
            ],
            "demographics": results["demographics"].to_dict(),
            "covariate_balance": {
                var: {k: to_python(v) for k, v in stats.items()}
                for var, stats in results["balance"].items()
            },
            "ancestry_qc": self.ancestry_qc.get_qc_summary(cohort) if len(cohort) else {},
        }

        if results["deduplication"] is not None:
            report["twin_deduplication"] = results["deduplication"].to_dict()
        if results["path_resolution"] is not None:
            report["path_resolution"] = results["path_resolution"].to_dict()

        report_path = self.output_dir / "cohort_qc_report.yaml"
        with open(report_path, "w") as f:
            yaml.dump(report, f, default_flow_style=False, sort_keys=False)

        logger.info(f"Saved QC report to {report_path}")

        logger.info("\nCohort Summary:")
        logger.info(f"  Total samples: {len(cohort)}")
        logger.info(f"  Cases: {n_cases}")
        logger.info(f"  Controls: {n_controls}")
        logger.info(f"  Ratio: {ratio:.2f}:1")
