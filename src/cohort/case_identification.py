"""
Case Identification Module

Builds the inclusion candidate set and the exclusion set from independent
evidence queries against the research warehouse:

    - rare disease registry enrolment (specific disease or umbrella group)
    - HPO phenotype terms recorded as present
    - ICD-10 diagnoses in hospital episode tables
    - ICD-10 cause of death
    - cancer registry / enrolment disease types

Each criterion is issued as its own query per source table and the
participant identifiers are unioned. A query returning no rows simply
contributes nothing.
"""

import logging
from dataclasses import dataclass, field
from typing import Iterable, Optional

import pandas as pd

from warehouse.queries import CAUSE_OF_DEATH_SOURCES, ICD10_SOURCES, get_template

logger = logging.getLogger(__name__)

CASE = "case"
CONTROL = "control"


def _unique(values: Iterable[str]) -> list[str]:
    seen = []
    for value in values or []:
        value = str(value).strip()
        if value and value not in seen:
            seen.append(value)
    return seen


def normalise_icd10(code: str) -> str:
    """Upper-case and strip dots ('m41.1' -> 'M411')."""
    return str(code).strip().upper().replace(".", "")


@dataclass
class EvidenceCriteria:
    """Named evidence criteria for one side of the cohort."""

    registry_terms: list[str] = field(default_factory=list)
    registry_groups: list[str] = field(default_factory=list)
    hpo_ids: list[str] = field(default_factory=list)
    icd10_codes: list[str] = field(default_factory=list)
    icd10_sources: dict = field(default_factory=lambda: dict(ICD10_SOURCES))
    cause_of_death_codes: list[str] = field(default_factory=list)
    cancer_types: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "EvidenceCriteria":
        data = dict(data or {})
        unknown = set(data) - set(cls.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown evidence criteria: {sorted(unknown)}")
        return cls(**data)

    def is_empty(self) -> bool:
        return not any([
            self.registry_terms,
            self.registry_groups,
            self.hpo_ids,
            self.icd10_codes,
            self.cause_of_death_codes,
            self.cancer_types,
        ])

    def requests(self) -> list[tuple[str, str, dict]]:
        """
        Expand criteria into (source, template key, params) requests.

        One request is produced per criterion and per source table.
        """
        reqs = []

        terms = _unique(self.registry_terms)
        if terms:
            reqs.append(("registry_term", "registry_by_terms", {"terms": terms}))

        groups = _unique(self.registry_groups)
        if groups:
            reqs.append(("registry_group", "registry_by_groups", {"groups": groups}))

        hpo_ids = _unique(self.hpo_ids)
        if hpo_ids:
            reqs.append(("hpo", "hpo_present", {"hpo_ids": hpo_ids}))

        codes = _unique(normalise_icd10(c) for c in self.icd10_codes)
        if codes:
            for table, code_col in sorted(self.icd10_sources.items()):
                reqs.append((
                    f"icd10:{table}",
                    "icd10_from_table",
                    {"table": table, "code_col": code_col, "like_diag": ("diag", codes)},
                ))

        death_codes = _unique(normalise_icd10(c) for c in self.cause_of_death_codes)
        if death_codes:
            for table, code_col in sorted(CAUSE_OF_DEATH_SOURCES.items()):
                reqs.append((
                    f"cause_of_death:{table}",
                    "icd10_from_table",
                    {"table": table, "code_col": code_col, "like_diag": ("diag", death_codes)},
                ))

        cancer_types = _unique(self.cancer_types)
        if cancer_types:
            reqs.append((
                "cancer:cancer_participant_disease",
                "cancer_participant_disease_by_types",
                {"cancer_types": cancer_types},
            ))
            reqs.append((
                "cancer:cancer_registry",
                "cancer_registry_by_types",
                {"cancer_types": cancer_types},
            ))

        return reqs


class CandidateCollector:
    """Unions participant identifiers over independent evidence queries."""

    def __init__(self, service):
        """
        Args:
            service: Query service used to run the evidence queries.
        """
        self.service = service

    def collect_evidence(self, criteria: EvidenceCriteria) -> pd.DataFrame:
        """
        Run every evidence query and stack the results.

        Returns:
            DataFrame with columns participant_id, evidence, source.
        """
        reqs = criteria.requests()
        if not reqs:
            logger.warning("No evidence criteria given; nothing to collect")
            return pd.DataFrame(columns=["participant_id", "evidence", "source"])

        statements = [get_template(key).render(**params) for _, key, params in reqs]
        results = self.service.execute_many(statements)

        frames = []
        for (source, _, _), df in zip(reqs, results):
            if df is None or df.empty or "participant_id" not in df.columns:
                logger.info(f"  {source}: 0 participants")
                continue
            out = pd.DataFrame({
                "participant_id": df["participant_id"].astype(str),
                "evidence": df["evidence"].astype(str) if "evidence" in df.columns else "",
                "source": source,
            })
            logger.info(f"  {source}: {out['participant_id'].nunique()} participants")
            frames.append(out)

        if not frames:
            return pd.DataFrame(columns=["participant_id", "evidence", "source"])

        return pd.concat(frames, ignore_index=True).drop_duplicates().reset_index(drop=True)

    def collect(self, criteria: EvidenceCriteria) -> set[str]:
        """Return the union of participant identifiers over all criteria."""
        evidence = self.collect_evidence(criteria)
        ids = set(evidence["participant_id"].dropna().astype(str))
        logger.info(f"Collected {len(ids)} unique participants")
        return ids


class ExclusionFilter:
    """Builds the exclusion set and the control population."""

    def __init__(self, service, collector: Optional[CandidateCollector] = None):
        self.service = service
        self.collector = collector or CandidateCollector(service)

    def exclusion_set(self, criteria: EvidenceCriteria) -> set[str]:
        """Union of participants matching the broadened exclusion criteria."""
        logger.info("Building exclusion set...")
        return self.collector.collect(criteria)

    def fetch_universe(self) -> pd.DataFrame:
        """
        Enumerate the whole participant table.

        The universe is fetched once and filtered client side rather than
        pushing a long identifier list into a query predicate.
        """
        universe = self.service.execute_template("participant_universe")
        if universe.empty:
            return pd.DataFrame(columns=["participant_id", "year_of_birth", "phenotypic_sex"])
        universe = universe.copy()
        universe["participant_id"] = universe["participant_id"].astype(str)
        universe = universe.drop_duplicates("participant_id").reset_index(drop=True)
        logger.info(f"Participant universe: {len(universe)} participants")
        return universe

    @staticmethod
    def control_population(
        universe: Iterable[str],
        exclusion: Iterable[str],
        cases: Iterable[str] = (),
    ) -> set[str]:
        """Universe minus the exclusion set (and any cases)."""
        universe = {str(p) for p in universe}
        removed = {str(p) for p in exclusion} | {str(p) for p in cases}
        controls = universe - removed
        logger.info(
            f"Control population: {len(universe)} -> {len(controls)} "
            f"({len(universe) - len(controls)} excluded)"
        )
        return controls


def label_participants(
    universe: pd.DataFrame,
    cases: set[str],
    controls: set[str],
) -> pd.DataFrame:
    """
    Attach case/control labels to universe rows.

    Participants in neither set are dropped. A participant in both sets is
    labelled case.
    """
    df = universe.copy()
    df["participant_id"] = df["participant_id"].astype(str)

    missing_cases = set(cases) - set(df["participant_id"])
    if missing_cases:
        logger.warning(
            f"{len(missing_cases)} candidate cases are absent from the participant universe"
        )

    df["label"] = None
    df.loc[df["participant_id"].isin(controls), "label"] = CONTROL
    df.loc[df["participant_id"].isin(cases), "label"] = CASE
    df = df[df["label"].notna()].reset_index(drop=True)

    n_cases = (df["label"] == CASE).sum()
    n_controls = (df["label"] == CONTROL).sum()
    logger.info(f"Labels assigned: {n_cases} cases, {n_controls} controls")

    return df
