#!/usr/bin/env python3
"""
Build a Case-Control Cohort from a Warehouse Release

This script orchestrates the cohort building pipeline:
1. Collect candidate cases (registry terms, HPO terms, ICD-10 codes)
2. Build the exclusion set and the control population
3. Review case/control demographics (operator confirmation)
4. Apply ancestry, karyotype and sample provenance QC
5. Remove monozygotic twins
6. Resolve genomic file paths and save the cohort

Usage:
    python scripts/build_cohort.py \
        --config configs/cohort_config.yaml \
        --kinship /path/to/relatedness.kin0 \
        --output data/cohort

Output Files:
    - cohort.parquet: Final cohort with labels and file paths
    - funnel.parquet: Participant counts after each stage
    - file_paths.txt: One file path per cohort member
    - cohort_qc_report.yaml: Demographics and stage reports
"""

import argparse
import logging
import sys
from pathlib import Path

# Add src to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root / "src"))

from cohort import CohortBuilder, CohortConfig
from cohort.demographics import DemographicReviewRejected
from warehouse import QueryConfig, QueryError, QueryService


def setup_logging(verbose: bool = False) -> None:
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Build a case-control cohort from a research warehouse release",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=project_root / "configs" / "cohort_config.yaml",
        help="Path to configuration YAML file (warehouse + cohort sections)",
    )

    parser.add_argument(
        "--database-version",
        default=None,
        help="Override the release snapshot, e.g. main-programme/main-programme_v18_2023-12-21",
    )

    parser.add_argument(
        "--kinship",
        type=Path,
        default=None,
        help="Path to kinship file for twin deduplication",
    )

    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help="Output directory for cohort files (default: from config)",
    )

    parser.add_argument(
        "--file-category",
        default=None,
        help="File category to resolve, e.g. 'Standard VCF' (default: from config)",
    )

    parser.add_argument(
        "--controls-per-case",
        type=int,
        default=None,
        help="Enable nearest-neighbor control matching at this ratio",
    )

    parser.add_argument(
        "--accept-demographics",
        action="store_true",
        help="Accept the demographic summary without an interactive prompt",
    )

    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable verbose logging",
    )

    return parser.parse_args()


def prompt_confirmation(summary) -> bool:
    """Show the demographic summary and ask the operator to accept it."""
    print("\nCase/control demographics:\n")
    print(summary.format())
    answer = input("\nAccept this demographic match and continue? [y/N] ")
    return answer.strip().lower() in ("y", "yes")


def main() -> int:
    """Main entry point."""
    args = parse_args()
    setup_logging(args.verbose)

    logger = logging.getLogger(__name__)

    if not args.config.exists():
        logger.error(f"Configuration file not found: {args.config}")
        return 1

    if args.kinship and not args.kinship.exists():
        logger.error(f"Kinship file not found: {args.kinship}")
        return 1

    logger.info(f"Loading configuration from {args.config}")
    try:
        query_config = QueryConfig.from_yaml(args.config)
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid warehouse configuration: {e}")
        return 1
    try:
        config = CohortConfig.from_yaml(args.config)
    except (TypeError, ValueError) as e:
        logger.error(f"Invalid cohort configuration: {e}")
        return 1

    # Override config with command line arguments
    if args.database_version:
        query_config.database_version = args.database_version
    if args.kinship:
        config.kinship_file = str(args.kinship)
    if args.output:
        config.output_dir = str(args.output)
    if args.file_category:
        config.file_category = args.file_category
    if args.controls_per_case is not None:
        config.controls_per_case = args.controls_per_case

    confirm = (lambda summary: True) if args.accept_demographics else prompt_confirmation

    service = QueryService(query_config)
    builder = CohortBuilder(service, config)

    try:
        results = builder.build_cohort(confirm)
    except DemographicReviewRejected:
        logger.error("Stopped: demographic match rejected")
        return 2
    except QueryError as e:
        logger.error(f"Cohort building failed: {e}", exc_info=True)
        return 1

    cohort = results["cohort"]
    n_cases = int(cohort["is_case"].sum())
    n_controls = len(cohort) - n_cases

    logger.info("\n" + "=" * 60)
    logger.info("SUCCESS: Cohort building complete!")
    logger.info(f"  Total samples: {len(cohort)}")
    logger.info(f"  Cases: {n_cases}")
    logger.info(f"  Controls: {n_controls}")
    if results["path_resolution"] is not None:
        logger.info(f"  Without files: {results['path_resolution'].n_unresolved}")
    logger.info(f"  Output: {config.output_dir}")
    logger.info("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(main())
