import json
from unittest.mock import MagicMock

import pandas as pd
import pytest
import requests
from labkey.api_wrapper import APIWrapper
from labkey.exceptions import RequestAuthorizationError, RequestError, ServerContextError

from conftest import TEST_RELEASE, make_service
from warehouse.client import (
    QueryConfig,
    QueryError,
    QueryService,
    QueryTruncatedError,
    is_retryable,
)


def _response(status_code, payload):
    response = requests.Response()
    response.status_code = status_code
    response._content = json.dumps(payload).encode()
    return response


def _wrapped(inner):
    """Failure as the LabKey client raises it from execute_sql."""
    return ServerContextError(None, inner)


def _http_error(status_code):
    return _wrapped(RequestError(_response(status_code, {"exception": "failed"})))


def _service_with(side_effect, **overrides):
    settings = {"domain": "warehouse.test", "database_version": TEST_RELEASE}
    settings.update(overrides)
    client = MagicMock()
    client.query.execute_sql.side_effect = side_effect
    sleeps = []
    service = QueryService(QueryConfig(**settings), client=client, sleep=sleeps.append)
    return service, client, sleeps


def test_execute_returns_rows_with_explicit_cap_and_release():
    table = pd.DataFrame({"participant_id": ["P1", "P2"], "year_of_birth": [1970, 1980]})
    service, client = make_service({"participant": table}, max_rows=100)

    df = service.execute("SELECT participant_id, year_of_birth FROM participant")

    assert list(df["participant_id"]) == ["P1", "P2"]
    call = client.query.calls[0]
    assert call["max_rows"] == 100
    assert call["container_path"] == TEST_RELEASE
    assert call["schema_name"] == "lists"


def test_execute_addresses_requested_release():
    service, client = make_service({})
    service.execute("SELECT 1 FROM participant", database_version="main-programme/v17", max_rows=5)
    assert client.query.calls[0]["container_path"] == "main-programme/v17"
    assert client.query.calls[0]["max_rows"] == 5


def test_empty_result_keeps_column_names():
    service, _ = make_service({"participant": pd.DataFrame(columns=["participant_id"])})
    df = service.execute("SELECT participant_id FROM participant")
    assert df.empty
    assert list(df.columns) == ["participant_id"]


def test_result_at_cap_raises_when_expansion_disabled():
    table = pd.DataFrame({"participant_id": [f"P{i}" for i in range(10)]})
    service, _ = make_service({"participant": table}, max_rows=10, expand_truncated=False)

    with pytest.raises(QueryTruncatedError) as excinfo:
        service.execute("SELECT participant_id FROM participant")
    assert excinfo.value.max_rows == 10


def test_result_at_cap_is_requeried_with_larger_cap():
    table = pd.DataFrame({"participant_id": [f"P{i}" for i in range(25)]})
    service, client = make_service({"participant": table}, max_rows=5)

    df = service.execute("SELECT participant_id FROM participant")

    assert len(df) == 25
    assert [c["max_rows"] for c in client.query.calls] == [5, 50]


def test_expansion_stops_at_ceiling():
    table = pd.DataFrame({"participant_id": [f"P{i}" for i in range(50)]})
    service, _ = make_service({"participant": table}, max_rows=5, max_row_ceiling=40)
    with pytest.raises(QueryTruncatedError):
        service.execute("SELECT participant_id FROM participant")


def test_transient_failures_are_retried_with_backoff():
    ok = {"rows": [{"participant_id": "P1"}]}
    service, client, sleeps = _service_with(
        [_wrapped(requests.exceptions.Timeout("read timed out")), _http_error(503), ok],
        backoff_base=1.5,
    )

    df = service.execute("SELECT participant_id FROM participant")

    assert list(df["participant_id"]) == ["P1"]
    assert client.query.execute_sql.call_count == 3
    assert sleeps == [1.5, 3.0]


def test_malformed_sql_is_not_retried():
    service, client, sleeps = _service_with([_http_error(400)])
    with pytest.raises(QueryError) as excinfo:
        service.execute("SELEC participant_id FROM participant")
    assert client.query.execute_sql.call_count == 1
    assert sleeps == []
    assert "SELEC" in excinfo.value.sql


def test_retries_exhausted_raises_query_error():
    service, client, _ = _service_with(
        [_wrapped(requests.exceptions.ConnectionError())] * 3, max_retries=2
    )
    with pytest.raises(QueryError):
        service.execute("SELECT participant_id FROM participant")
    assert client.query.execute_sql.call_count == 3


def test_is_retryable_classification():
    assert is_retryable(requests.exceptions.Timeout())
    assert is_retryable(_wrapped(requests.exceptions.Timeout()))
    assert is_retryable(_wrapped(requests.exceptions.ConnectionError()))
    assert is_retryable(_http_error(429))
    assert is_retryable(_http_error(500))
    assert not is_retryable(_http_error(400))
    assert not is_retryable(RequestAuthorizationError(_response(401, {})))
    assert not is_retryable(ValueError("bad"))


def _labkey_client(session_results):
    """A real LabKey client whose HTTP session is mocked."""
    client = APIWrapper("warehouse.test", TEST_RELEASE, context_path="labkey", disable_csrf=True)
    session = MagicMock()
    session.post.side_effect = session_results
    client.server_context._session = session
    return client, session


def _labkey_service(client, **overrides):
    settings = {"domain": "warehouse.test", "database_version": TEST_RELEASE}
    settings.update(overrides)
    sleeps = []
    service = QueryService(QueryConfig(**settings), client=client, sleep=sleeps.append)
    return service, sleeps


def test_labkey_client_timeout_and_server_error_are_retried():
    ok = _response(200, {
        "rows": [{"participant_id": "P1"}],
        "metaData": {"fields": [{"name": "participant_id"}]},
    })
    client, session = _labkey_client([
        requests.exceptions.Timeout("read timed out"),
        _response(503, {"exception": "Service Unavailable"}),
        ok,
    ])
    service, sleeps = _labkey_service(client, max_retries=3)

    df = service.execute("SELECT participant_id FROM participant")

    assert list(df["participant_id"]) == ["P1"]
    assert session.post.call_count == 3
    assert sleeps == [1.0, 2.0]


def test_labkey_client_gives_up_after_max_retries():
    client, session = _labkey_client([requests.exceptions.Timeout("read timed out")] * 4)
    service, sleeps = _labkey_service(client, max_retries=3)

    with pytest.raises(QueryError):
        service.execute("SELECT participant_id FROM participant")
    assert session.post.call_count == 4
    assert sleeps == [1.0, 2.0, 4.0]


@pytest.mark.parametrize("status_code", [400, 401])
def test_labkey_client_request_errors_are_not_retried(status_code):
    client, session = _labkey_client([_response(status_code, {"exception": "rejected"})])
    service, sleeps = _labkey_service(client, max_retries=3)

    with pytest.raises(QueryError):
        service.execute("SELEC participant_id FROM participant")
    assert session.post.call_count == 1
    assert sleeps == []


def test_execute_many_preserves_input_order_with_workers():
    tables = {
        name: pd.DataFrame({"participant_id": [name]})
        for name in ["hes_apc", "hes_op", "hes_ae", "mortality"]
    }
    service, client = make_service(tables, max_workers=3)

    statements = [f"SELECT participant_id FROM {name}" for name in tables]
    results = service.execute_many(statements)

    assert [df["participant_id"].iloc[0] for df in results] == list(tables)
    assert len(client.query.calls) == 4


def test_execute_template_renders_parameters():
    service, client = make_service({})
    service.execute_template("file_paths_by_category", category="Standard VCF")
    assert "file_sub_type = 'Standard VCF'" in client.query.calls[0]["sql"]


def test_config_requires_domain_and_release():
    with pytest.raises(ValueError):
        QueryConfig(domain="", database_version=TEST_RELEASE)
    with pytest.raises(ValueError):
        QueryConfig(domain="warehouse.test", database_version="")


def test_config_from_yaml(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text(
        "warehouse:\n"
        "  domain: warehouse.test\n"
        f"  database_version: {TEST_RELEASE}\n"
        "  max_rows: 1000\n"
        "  max_workers: 2\n"
    )
    config = QueryConfig.from_yaml(path)
    assert config.max_rows == 1000
    assert config.max_workers == 2
    assert config.api_key is None

    path.write_text("warehouse:\n  domain: x\n  database_version: y\n  password: z\n")
    with pytest.raises(ValueError):
        QueryConfig.from_yaml(path)
