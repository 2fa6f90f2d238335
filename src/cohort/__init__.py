# Cohort construction: case/exclusion collection, QC, deduplication, file paths
from .case_identification import CandidateCollector, EvidenceCriteria, ExclusionFilter
from .ancestry_qc import AncestryQC
from .control_matching import ControlMatcher
from .relatedness import TwinDeduplicator
from .file_paths import FilePathResolver
from .cohort_builder import CohortBuilder, CohortConfig

__all__ = [
    "CandidateCollector",
    "EvidenceCriteria",
    "ExclusionFilter",
    "AncestryQC",
    "ControlMatcher",
    "TwinDeduplicator",
    "FilePathResolver",
    "CohortBuilder",
    "CohortConfig",
]
