import datetime
import json
from unittest.mock import patch

import pytest
from django.test import Client

from db_analyst.errors import QueryExecutionError, QueryValidationError


def post_json(client, url, data):
    return client.post(url, data=json.dumps(data), content_type="application/json")


@pytest.mark.django_db
def test_execute_query_view_success():
    client = Client()
    with patch("db_analyst.views.QueryService") as mock_service:
        mock_service.return_value.execute_query.return_value = [
            {"id": 1, "created": datetime.date(2024, 5, 1)}
        ]
        resp = post_json(client, "/db-analyst/execute/", {"query": "SELECT * FROM public.users"})

    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "data": [{"id": 1, "created": "2024-05-01"}],
        "row_count": 1,
    }
    mock_service.return_value.execute_query.assert_called_once_with(
        "SELECT * FROM public.users"
    )
    mock_service.return_value.close.assert_called_once()


@pytest.mark.django_db
def test_execute_query_view_rejected_statement():
    client = Client()
    with patch("db_analyst.services.PgHandler") as mock_handler:
        resp = post_json(client, "/db-analyst/execute/", {"query": "DROP TABLE public.users"})

    assert resp.status_code == 400
    assert resp.json() == {"error": "The query must start with SELECT."}
    mock_handler.return_value.execute_query.assert_not_called()


@pytest.mark.django_db
def test_execute_query_view_validation_error():
    client = Client()
    with patch("db_analyst.views.QueryService") as mock_service:
        mock_service.return_value.execute_query.side_effect = QueryValidationError(
            "Semicolons are not allowed; submit a single statement without ';'."
        )
        resp = post_json(client, "/db-analyst/execute/", {"query": "SELECT 1;"})

    assert resp.status_code == 400
    assert "Semicolons" in resp.json()["error"]


@pytest.mark.django_db
def test_execute_query_view_execution_error():
    client = Client()
    with patch("db_analyst.views.QueryService") as mock_service:
        mock_service.return_value.execute_query.side_effect = QueryExecutionError(
            'SQL execution failed: relation "nope" does not exist'
        )
        resp = post_json(client, "/db-analyst/execute/", {"query": "SELECT * FROM nope"})

    assert resp.status_code == 400
    assert "does not exist" in resp.json()["error"]


@pytest.mark.django_db
def test_execute_query_view_internal_error():
    client = Client()
    with patch("db_analyst.views.QueryService") as mock_service:
        mock_service.return_value.execute_query.side_effect = Exception("fail")
        resp = post_json(client, "/db-analyst/execute/", {"query": "SELECT 1"})

    assert resp.status_code == 500
    assert resp.json() == {"error": "An internal server error occurred"}


@pytest.mark.django_db
def test_execute_query_view_missing_query():
    client = Client()
    resp = post_json(client, "/db-analyst/execute/", {})
    assert resp.status_code == 400
    assert "error" in resp.json()


@pytest.mark.django_db
def test_execute_query_view_invalid_json():
    client = Client()
    resp = client.post("/db-analyst/execute/", data="notjson", content_type="application/json")
    assert resp.status_code == 400
    assert resp.json() == {"error": "Invalid JSON format"}


@pytest.mark.django_db
def test_execute_query_view_requires_post():
    client = Client()
    resp = client.get("/db-analyst/execute/")
    assert resp.status_code == 405


@pytest.mark.django_db
def test_validate_query_view():
    client = Client()

    ok = post_json(client, "/db-analyst/validate/", {"query": "SELECT * FROM public.users"})
    rejected = post_json(client, "/db-analyst/validate/", {"query": "SELECT * FROM secret.users"})

    assert ok.json() == {"valid": True, "error": None}
    assert rejected.status_code == 200
    assert rejected.json() == {
        "valid": False,
        "error": 'Schema "secret" is not allowed. Use only: public.',
    }


@pytest.mark.django_db
def test_validate_query_view_missing_query():
    client = Client()
    resp = post_json(client, "/db-analyst/validate/", {"sql": "SELECT 1"})
    assert resp.status_code == 400


@pytest.mark.django_db
def test_parse_content_view():
    client = Client()
    content = "[AUTO_EXECUTE]\n```sql\nSELECT 1;\n```"

    resp = post_json(client, "/db-analyst/parse/", {"content": content})

    assert resp.status_code == 200
    data = resp.json()
    assert data["plain_text"] == ""
    assert data["sql_blocks"][0]["query"] == "SELECT 1"
    assert data["sql_blocks"][0]["auto_execute"] is True


@pytest.mark.django_db
def test_parse_content_view_plain_text():
    client = Client()
    resp = post_json(client, "/db-analyst/parse/", {"content": "**Hello** there"})
    assert resp.json() == {"plain_text": "Hello there", "sql_blocks": []}


@pytest.mark.django_db
def test_parse_content_view_rejects_non_string():
    client = Client()
    resp = post_json(client, "/db-analyst/parse/", {"content": ["a"]})
    assert resp.status_code == 400


@pytest.mark.django_db
def test_list_agents_view():
    client = Client()
    resp = client.get("/db-analyst/agents/")
    assert resp.status_code == 200
    assert resp.json() == {
        "agents": [
            {
                "id": "sales",
                "name": "Sales analyst",
                "tables": ["orders", "customers"],
                "has_custom_prompt": False,
            }
        ]
    }


@pytest.mark.django_db
def test_list_agents_view_requires_get():
    client = Client()
    resp = client.post("/db-analyst/agents/")
    assert resp.status_code == 405
