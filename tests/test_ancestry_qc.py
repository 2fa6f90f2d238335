import numpy as np
import pandas as pd
import pytest

from cohort.ancestry_qc import ADMIXED, UNKNOWN, AncestryQC, assign_ancestry
from conftest import make_service


def test_assign_ancestry_threshold():
    scores = pd.DataFrame({
        "EUR": [0.85, 0.5, np.nan, 0.1],
        "SAS": [0.05, 0.4, np.nan, 0.8],
        "AFR": [0.1, 0.1, np.nan, 0.1],
    })
    labels = assign_ancestry(scores, threshold=0.8)
    assert list(labels) == ["EUR", ADMIXED, UNKNOWN, "SAS"]


def test_load_sample_stats_renames_scores_and_labels(release_tables):
    service, _ = make_service(release_tables)
    stats = AncestryQC().load_sample_stats(service)

    assert {"EUR", "SAS", "AFR", "EAS", "AMR"} <= set(stats.columns)
    labels = dict(zip(stats["participant_id"], stats["ancestry"]))
    assert labels["P1"] == "EUR"
    assert labels["P6"] == ADMIXED


def test_attach_sample_stats_is_inner_and_one_sample_per_participant():
    cohort = pd.DataFrame({"participant_id": ["P1", "P2", "P3"], "label": ["case", "control", "control"]})
    stats = pd.DataFrame({
        "participant_id": ["P1", "P1", "P2"],
        "platekey": ["LP2", "LP1", "LP3"],
        "karyotype": ["XX", "XX", "XY"],
    })
    joined = AncestryQC().attach_sample_stats(cohort, stats)

    assert list(joined["participant_id"]) == ["P1", "P2"]
    assert joined.loc[joined["participant_id"] == "P1", "platekey"].item() == "LP1"


def test_filter_ancestry_excludes_admixed():
    cohort = pd.DataFrame({
        "participant_id": ["P1", "P2", "P3", "P4"],
        "ancestry": ["EUR", ADMIXED, "SAS", UNKNOWN],
    })
    assert list(AncestryQC("EUR").filter_ancestry(cohort)["participant_id"]) == ["P1"]
    assert list(AncestryQC(None).filter_ancestry(cohort)["participant_id"]) == ["P1", "P3"]


def test_filter_karyotype_requires_concordant_sex():
    cohort = pd.DataFrame({
        "participant_id": ["P1", "P2", "P3", "P4", "P5"],
        "karyotype": ["XX", "XY", "XY", "XXY", "XX"],
        "phenotypic_sex": ["Female", "male", "Female", "Male", "Indeterminate"],
    })
    kept = AncestryQC().filter_karyotype(cohort)
    assert list(kept["participant_id"]) == ["P1", "P2"]


def test_unsupported_karyotype_is_rejected():
    with pytest.raises(ValueError):
        AncestryQC(allowed_karyotypes=["XX", "XO"])


def test_filter_provenance_matches_every_requirement():
    qc = AncestryQC(provenance={"sample_source": "BLOOD", "library_type": ["PCR-Free", "Nano"]})
    cohort = pd.DataFrame({"participant_id": ["P1", "P2", "P3"], "platekey": ["LP1", "LP2", "LP3"]})
    provenance = pd.DataFrame({
        "participant_id": ["P1", "P2", "P3"],
        "platekey": ["LP1", "LP2", "LP3"],
        "sample_source": ["BLOOD", "BLOOD", "SALIVA"],
        "library_type": ["PCR-Free", "Other", "PCR-Free"],
    })
    kept = qc.filter_provenance(cohort, provenance)
    assert list(kept["participant_id"]) == ["P1"]


def test_filter_provenance_missing_column_raises():
    qc = AncestryQC(provenance={"sample_source": "BLOOD"})
    cohort = pd.DataFrame({"participant_id": ["P1"], "platekey": ["LP1"]})
    provenance = pd.DataFrame({"participant_id": ["P1"], "platekey": ["LP1"]})
    with pytest.raises(ValueError):
        qc.filter_provenance(cohort, provenance)


def test_load_provenance_selects_requested_columns(release_tables):
    service, client = make_service(release_tables)
    qc = AncestryQC(provenance={"sample_source": "BLOOD"})
    df = qc.load_provenance(service)
    assert "plate_key AS platekey" in client.query.calls[0]["sql"]
    assert "sample_source" in client.query.calls[0]["sql"]
    assert len(df) == 10
