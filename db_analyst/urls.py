from django.urls import path

from .views import (
    execute_query_view,
    list_agents_view,
    parse_content_view,
    validate_query_view,
)

urlpatterns = [
    path("execute/", execute_query_view, name="execute_query_view"),
    path("validate/", validate_query_view, name="validate_query_view"),
    path("parse/", parse_content_view, name="parse_content_view"),
    path("agents/", list_agents_view, name="list_agents_view"),
]
