import pytest

from warehouse.queries import QUERIES, get_template
from warehouse.sql import (
    QueryTemplate,
    chunked,
    in_list,
    like_any,
    quote_identifier,
    quote_literal,
)


def test_quote_literal_escapes_single_quotes():
    assert quote_literal("Crohn's disease") == "'Crohn''s disease'"
    assert quote_literal("x' OR '1'='1") == "'x'' OR ''1''=''1'"


def test_quote_literal_scalars():
    assert quote_literal(None) == "NULL"
    assert quote_literal(True) == "TRUE"
    assert quote_literal(42) == "42"
    assert quote_literal(0.354) == "0.354"


def test_quote_literal_rejects_nul():
    with pytest.raises(ValueError):
        quote_literal("bad\x00value")


def test_quote_identifier_rejects_injection():
    assert quote_identifier("hes_apc") == "hes_apc"
    for bad in ["hes_apc; DROP TABLE participant", "1col", "col-name", ""]:
        with pytest.raises(ValueError):
            quote_identifier(bad)


def test_in_list_deduplicates_and_rejects_empty():
    assert in_list(["HP:1", "HP:2", "HP:1"]) == "('HP:1', 'HP:2')"
    with pytest.raises(ValueError):
        in_list([])


def test_like_any_builds_or_clause():
    clause = like_any("diag", ["I421", "I422"])
    assert clause == "(diag LIKE '%I421%' OR diag LIKE '%I422%')"


def test_like_any_escapes_wildcards():
    clause = like_any("diag", ["A_1"])
    assert "A\\_1" in clause
    assert "ESCAPE" in clause


def test_template_placeholders_must_match_params():
    with pytest.raises(ValueError):
        QueryTemplate("SELECT * FROM t WHERE a IN {ids}", params={})
    with pytest.raises(ValueError):
        QueryTemplate("SELECT 1", params={"ids": "list"})
    with pytest.raises(ValueError):
        QueryTemplate("SELECT {x}", params={"x": "raw"})


def test_template_render_checks_parameters():
    template = QueryTemplate(
        "SELECT participant_id FROM {table} WHERE code IN {codes}",
        params={"table": "identifier", "codes": "list"},
    )
    sql = template.render(table="hes_op", codes=["I42"])
    assert sql == "SELECT participant_id FROM hes_op WHERE code IN ('I42')"

    with pytest.raises(KeyError):
        template.render(table="hes_op")
    with pytest.raises(KeyError):
        template.render(table="hes_op", codes=["I42"], extra=1)


def test_single_string_list_param_is_not_split():
    sql = get_template("registry_by_terms").render(terms="Hypertrophic cardiomyopathy")
    assert "IN ('Hypertrophic cardiomyopathy')" in sql


def test_icd10_template_renders_table_and_like():
    sql = get_template("icd10_from_table").render(
        table="mortality",
        code_col="icd10_multiple_cause_all",
        like_diag=("diag", ["I46"]),
    )
    assert "FROM mortality" in sql
    assert "REGEXP_REPLACE(icd10_multiple_cause_all" in sql
    assert "diag LIKE '%I46%'" in sql


def test_every_template_has_declared_params():
    for key, template in QUERIES.items():
        assert isinstance(template, QueryTemplate), key


def test_unknown_template_raises():
    with pytest.raises(KeyError):
        get_template("no_such_query")


def test_chunked_splits_sequence():
    assert list(chunked(["a", "b", "c", "d", "e"], 2)) == [["a", "b"], ["c", "d"], ["e"]]
    assert list(chunked([], 3)) == []
    with pytest.raises(ValueError):
        list(chunked(["a"], 0))
