# Named SQL templates for the research warehouse tables.
# Table and column names follow the release schema; this file is the one place
# that needs editing when tables change between data releases.
#
# Any code-matching template exposes a canonical "diag" column with the dots
# stripped so ICD-10 codes can be matched with a single LIKE pattern.

from .sql import QueryTemplate

QUERIES = {
    # --------------------- Participant universe ---------------------
    "participant_universe": QueryTemplate(
        """
        SELECT participant_id,
               year_of_birth,
               participant_phenotypic_sex AS phenotypic_sex
        FROM participant
        """,
        description="Every participant in the release with birth year and stated sex.",
    ),

    # --------------------- Rare disease registry / HPO ---------------------
    "registry_by_terms": QueryTemplate(
        """
        SELECT DISTINCT participant_id,
               normalised_specific_disease AS evidence
        FROM rare_diseases_participant_disease
        WHERE normalised_specific_disease IN {terms}
        """,
        params={"terms": "list"},
    ),

    "registry_by_groups": QueryTemplate(
        """
        SELECT DISTINCT participant_id,
               normalised_disease_group AS evidence
        FROM rare_diseases_participant_disease
        WHERE normalised_disease_group IN {groups}
        """,
        params={"groups": "list"},
    ),

    "hpo_present": QueryTemplate(
        """
        SELECT DISTINCT participant_id,
               normalised_hpo_id AS evidence
        FROM rare_diseases_participant_phenotype
        WHERE hpo_present = 'Yes'
          AND normalised_hpo_id IN {hpo_ids}
        """,
        params={"hpo_ids": "list"},
    ),

    # --------------------- ICD-10 (HES / mortality) ---------------------
    "icd10_from_table": QueryTemplate(
        """
        WITH base AS (
            SELECT DISTINCT
                participant_id,
                REGEXP_REPLACE({code_col}, '\\.', '') AS diag
            FROM {table}
        )
        SELECT participant_id, diag AS evidence
        FROM base
        WHERE {like_diag}
        """,
        params={"code_col": "identifier", "table": "identifier", "like_diag": "like"},
    ),

    # --------------------- Cancer ---------------------
    "cancer_participant_disease_by_types": QueryTemplate(
        """
        SELECT DISTINCT participant_id,
               cancer_disease_type AS evidence
        FROM cancer_participant_disease
        WHERE cancer_disease_type IN {cancer_types}
        """,
        params={"cancer_types": "list"},
    ),

    "cancer_registry_by_types": QueryTemplate(
        """
        SELECT DISTINCT participant_id,
               cancer_type AS evidence
        FROM cancer_registry
        WHERE cancer_type IN {cancer_types}
        """,
        params={"cancer_types": "list"},
    ),

    # --------------------- Genomic sample data ---------------------
    "aggregate_sample_stats": QueryTemplate(
        """
        SELECT
            participant_id,
            platekey,
            karyotype,
            pred_african_ancestries,
            pred_south_asian_ancestries,
            pred_east_asian_ancestries,
            pred_european_ancestries,
            pred_american_ancestries
        FROM aggregate_gvcf_sample_stats
        """,
        description="Samples in the aggregate variant-call resource.",
    ),

    "sample_provenance": QueryTemplate(
        """
        SELECT participant_id,
               plate_key AS platekey,
               {columns}
        FROM plated_sample
        """,
        params={"columns": "identifiers"},
    ),

    "file_paths_by_category": QueryTemplate(
        """
        SELECT participant_id,
               platekey,
               filename,
               file_path,
               file_sub_type
        FROM genome_file_paths_and_types
        WHERE file_sub_type = {category}
        """,
        params={"category": "literal"},
    ),

    # --------------------- Episode records ---------------------
    "records_for_participants": QueryTemplate(
        """
        SELECT {columns}
        FROM {table}
        WHERE participant_id IN {participants}
        """,
        params={"columns": "identifiers", "table": "identifier", "participants": "list"},
    ),
}

# Tables holding ICD-10 diagnoses, keyed by table name with the column that
# carries the (possibly pipe-joined) codes.
ICD10_SOURCES = {
    "hes_apc": "diag_all",
    "hes_op": "diag_all",
    "hes_ae": "diag_all",
}

CAUSE_OF_DEATH_SOURCES = {
    "mortality": "icd10_multiple_cause_all",
}

ANCESTRY_COLUMNS = {
    "pred_african_ancestries": "AFR",
    "pred_south_asian_ancestries": "SAS",
    "pred_east_asian_ancestries": "EAS",
    "pred_european_ancestries": "EUR",
    "pred_american_ancestries": "AMR",
}


def get_template(key: str) -> QueryTemplate:
    """Look up a named template."""
    try:
        return QUERIES[key]
    except KeyError:
        raise KeyError(f"Unknown query template: {key!r}") from None
