import pathlib
import re
import sys

import pandas as pd
import pytest

ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT / "src") not in sys.path:
    sys.path.insert(0, str(ROOT / "src"))

from warehouse.client import QueryConfig, QueryService

TEST_RELEASE = "main-programme/main-programme_v18_2023-12-21"

_FROM_RE = re.compile(r"\bFROM\s+([A-Za-z_][A-Za-z0-9_]*)", re.IGNORECASE)


class FakeQuery:
    """Stands in for the LabKey query API; serves whole tables by name."""

    def __init__(self, tables):
        self.tables = tables
        self.calls = []

    def execute_sql(self, schema_name, sql, max_rows=None, timeout=None, container_path=None):
        self.calls.append({
            "schema_name": schema_name,
            "sql": sql,
            "max_rows": max_rows,
            "timeout": timeout,
            "container_path": container_path,
        })
        names = [n for n in _FROM_RE.findall(sql) if n.lower() != "base"]
        table = self.tables.get(names[0]) if names else None
        if table is None:
            return {"rows": [], "metaData": {"fields": []}}
        rows = table.to_dict(orient="records")
        if max_rows is not None:
            rows = rows[:max_rows]
        return {
            "rows": rows,
            "metaData": {"fields": [{"name": c} for c in table.columns]},
        }


class FakeClient:
    def __init__(self, tables=None):
        self.query = FakeQuery(tables or {})


def make_service(tables=None, **overrides):
    settings = {"domain": "warehouse.test", "database_version": TEST_RELEASE}
    settings.update(overrides)
    client = FakeClient(tables)
    service = QueryService(QueryConfig(**settings), client=client, sleep=lambda s: None)
    return service, client


@pytest.fixture
def release_tables():
    """A small synthetic release: ten participants, two cases."""
    ids = [f"P{i}" for i in range(1, 11)]
    participant = pd.DataFrame({
        "participant_id": ids,
        "year_of_birth": [1970, 1972, 1980, 1965, 1990, 1985, 1975, 1968, 1979, 1988],
        "phenotypic_sex": ["Female", "Male", "Female", "Male", "Female",
                           "Male", "Female", "Male", "Female", "Male"],
    })
    phenotype = pd.DataFrame({
        "participant_id": ["P1", "P2"],
        "evidence": ["HP:0001639", "HP:0001639"],
    })
    hes_apc = pd.DataFrame({
        "participant_id": ["P1", "P3"],
        "evidence": ["I421", "I429"],
    })
    sample_stats = pd.DataFrame({
        "participant_id": ids,
        "platekey": [f"LP{i:03d}" for i in range(1, 11)],
        "karyotype": ["XX", "XY", "XX", "XY", "XX", "XY", "XX", "XY", "XXY", "XY"],
        "pred_african_ancestries": [0.01] * 10,
        "pred_south_asian_ancestries": [0.02, 0.02, 0.02, 0.02, 0.02, 0.4, 0.02, 0.02, 0.02, 0.02],
        "pred_east_asian_ancestries": [0.01] * 10,
        "pred_european_ancestries": [0.95, 0.9, 0.9, 0.92, 0.88, 0.5, 0.9, 0.93, 0.9, 0.9],
        "pred_american_ancestries": [0.01] * 10,
    })
    plated = pd.DataFrame({
        "participant_id": ids,
        "platekey": [f"LP{i:03d}" for i in range(1, 11)],
        "sample_source": ["BLOOD"] * 9 + ["SALIVA"],
    })
    files = pd.DataFrame({
        "participant_id": ["P1", "P2", "P4", "P5", "P7"],
        "platekey": ["LP001", "LP002", "LP004", "LP005", "LP007"],
        "filename": [f"LP00{i}.vcf.gz" for i in (1, 2, 4, 5, 7)],
        "file_path": [f"/genomes/LP00{i}.vcf.gz" for i in (1, 2, 4, 5, 7)],
        "file_sub_type": ["Standard VCF"] * 5,
    })
    return {
        "participant": participant,
        "rare_diseases_participant_phenotype": phenotype,
        "hes_apc": hes_apc,
        "aggregate_gvcf_sample_stats": sample_stats,
        "plated_sample": plated,
        "genome_file_paths_and_types": files,
    }
