"""View handlers for the database analyst API endpoints."""

import json
import logging

from django.core.serializers.json import DjangoJSONEncoder
from django.http import JsonResponse
from django.views.decorators.csrf import csrf_exempt
from django.views.decorators.http import require_GET, require_POST

from .errors import QueryExecutionError, QueryValidationError
from .parser import parse_assistant_content
from .services import QueryService, get_app_settings
from .validator import QueryValidator, ValidationPolicy

logger = logging.getLogger(__name__)


def _load_json(request):
    """Decoded JSON object from the request body, or None if it is not one."""
    try:
        data = json.loads(request.body)
    except json.JSONDecodeError:
        return None
    return data if isinstance(data, dict) else None


@csrf_exempt
@require_POST
def execute_query_view(request):
    """Validate and execute a single read-only SQL statement.

    Request format:
    {
        "query": "SELECT ..."
    }

    Response format:
    {
        "success": true,
        "data": [{"column": "value", ...}, ...],
        "row_count": 1
    }

    Rejected statements and database errors answer 400 with ``{"error": ...}``;
    the database is never contacted for a rejected statement.
    """
    data = _load_json(request)
    if data is None:
        return JsonResponse({"error": "Invalid JSON format"}, status=400)

    sql_query = data.get("query")
    if not sql_query or not isinstance(sql_query, str):
        return JsonResponse({"error": "Missing 'query' in request body"}, status=400)

    query_service = None
    try:
        query_service = QueryService(get_app_settings())
        rows = query_service.execute_query(sql_query)
    except QueryValidationError as e:
        return JsonResponse({"error": e.reason}, status=400)
    except QueryExecutionError as e:
        return JsonResponse({"error": str(e)}, status=400)
    except Exception as e:
        logger.error(f"Error in execute_query_view: {e}")
        return JsonResponse({"error": "An internal server error occurred"}, status=500)
    finally:
        if query_service:
            query_service.close()

    logger.info(f"Executed query returning {len(rows)} row(s)")
    return JsonResponse(
        {"success": True, "data": rows, "row_count": len(rows)},
        encoder=DjangoJSONEncoder,
    )


@csrf_exempt
@require_POST
def validate_query_view(request):
    """Check a statement against the configured policy without running it.

    Response format: ``{"valid": bool, "error": "reason or null"}``
    """
    data = _load_json(request)
    if data is None:
        return JsonResponse({"error": "Invalid JSON format"}, status=400)

    sql_query = data.get("query")
    if not isinstance(sql_query, str):
        return JsonResponse({"error": "Missing 'query' in request body"}, status=400)

    validator = QueryValidator(ValidationPolicy.from_settings(get_app_settings()))
    result = validator.validate(sql_query)
    return JsonResponse({"valid": result.valid, "error": result.error})


@csrf_exempt
@require_POST
def parse_content_view(request):
    """Split an assistant reply into SQL blocks or plain text.

    Request format: ``{"content": "raw assistant text"}``
    """
    data = _load_json(request)
    if data is None:
        return JsonResponse({"error": "Invalid JSON format"}, status=400)

    content = data.get("content")
    if content is not None and not isinstance(content, str):
        return JsonResponse({"error": "'content' must be a string"}, status=400)

    return JsonResponse(parse_assistant_content(content).to_dict())


@require_GET
def list_agents_view(request):
    """List the configured analyst agents a chat can be scoped to."""
    config = get_app_settings()
    agents = [
        {
            "id": agent.agent_id,
            "name": agent.name,
            "tables": list(agent.tables),
            "has_custom_prompt": bool(agent.system_prompt),
        }
        for agent in config.agents
    ]
    return JsonResponse({"agents": agents})
