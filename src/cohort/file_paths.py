"""
Genome file path resolution.

Joins the finalised cohort to the file-location table for one file category
(e.g. "Standard VCF", "BAM"). The whole category is fetched once and joined
client side. Participants without a matching file are dropped and reported.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path

import pandas as pd

logger = logging.getLogger(__name__)

FILE_COLUMNS = ["filename", "file_path", "file_sub_type"]


@dataclass
class PathResolutionReport:
    """Counts and unresolved keys from joining a cohort to its files."""

    file_category: str
    join_key: str
    n_input: int = 0
    n_resolved: int = 0
    n_duplicate_files: int = 0
    unresolved: list[str] = field(default_factory=list)

    @property
    def n_unresolved(self) -> int:
        return len(self.unresolved)

    def to_dict(self) -> dict:
        return {
            "file_category": self.file_category,
            "join_key": self.join_key,
            "n_input": self.n_input,
            "n_resolved": self.n_resolved,
            "n_unresolved": self.n_unresolved,
            "n_duplicate_files": self.n_duplicate_files,
        }


class FilePathResolver:
    """Resolves genomic file paths for cohort members."""

    def __init__(self, service, join_key: str = "platekey"):
        """
        Args:
            service: Query service for the file-location table.
            join_key: Cohort column to join on, ``platekey`` or
                ``participant_id``.
        """
        if join_key not in ("platekey", "participant_id"):
            raise ValueError("join_key must be 'platekey' or 'participant_id'")
        self.service = service
        self.join_key = join_key

    def fetch_files(self, file_category: str) -> pd.DataFrame:
        files = self.service.execute_template("file_paths_by_category", category=file_category)
        if files.empty:
            return pd.DataFrame(columns=["participant_id", "platekey"] + FILE_COLUMNS)
        files = files.copy()
        files["participant_id"] = files["participant_id"].astype(str)
        files["platekey"] = files["platekey"].astype(str)
        logger.info(f"Fetched {len(files)} '{file_category}' file rows")
        return files

    def join(
        self,
        cohort: pd.DataFrame,
        files: pd.DataFrame,
        file_category: str = "",
    ) -> tuple[pd.DataFrame, PathResolutionReport]:
        """
        Inner-join cohort rows to one file each.

        When a key has several files the first by file path is kept, so the
        output never has more rows than the cohort.
        """
        key = self.join_key
        report = PathResolutionReport(file_category=file_category, join_key=key)
        report.n_input = len(cohort)

        files = files.sort_values([key, "file_path"])
        dup = files[key].duplicated()
        report.n_duplicate_files = int(dup.sum())
        if report.n_duplicate_files:
            logger.info(f"  {report.n_duplicate_files} additional files per {key} ignored")
        files = files[~dup]

        other = "participant_id" if key == "platekey" else "platekey"
        file_cols = [key] + [c for c in FILE_COLUMNS if c in files.columns]
        if other not in cohort.columns and other in files.columns:
            file_cols.append(other)

        left = cohort.copy()
        left[key] = left[key].astype(str)
        result = left.merge(files[file_cols], on=key, how="inner")

        report.n_resolved = len(result)
        report.unresolved = sorted(set(left[key]) - set(result[key]))
        if report.unresolved:
            logger.warning(
                f"No '{file_category}' file for {report.n_unresolved} of "
                f"{report.n_input} cohort members; they are dropped"
            )
        logger.info(f"Path resolution: {report.n_input} -> {report.n_resolved}")

        return result, report

    def resolve(
        self,
        cohort: pd.DataFrame,
        file_category: str,
    ) -> tuple[pd.DataFrame, PathResolutionReport]:
        """Fetch the file category and join it to the cohort."""
        files = self.fetch_files(file_category)
        return self.join(cohort, files, file_category)


def export_path_list(table: pd.DataFrame, output_file: Path) -> Path:
    """Write one file path per line for downstream pipelines."""
    output_file = Path(output_file)
    output_file.parent.mkdir(parents=True, exist_ok=True)
    paths = table["file_path"].dropna().astype(str)
    output_file.write_text("".join(f"{p}\n" for p in paths))
    logger.info(f"Wrote {len(paths)} file paths to {output_file}")
    return output_file
