from unittest.mock import MagicMock, patch

import pytest

from db_analyst.conf import load_settings
from db_analyst.constants import AUTO_EXECUTE_TAG, DatabaseDialects
from db_analyst.errors import QueryExecutionError, QueryValidationError
from db_analyst.services import ChatService, QueryService, get_app_settings
from db_analyst.storage import InMemoryConversationStorage


@pytest.fixture
def mock_handler():
    handler = MagicMock()
    handler.connector.dialect = DatabaseDialects.POSTGRESQL
    handler.get_schema.return_value = "Schema: public\n  Table: users\n    Columns: id (integer)"
    handler.execute_query.return_value = [{"id": 1}]
    return handler


class FakeLLMAdapter:
    def __init__(self, chunks):
        self.chunks = chunks
        self.calls = []

    async def stream_text(self, system_prompt, messages, max_tokens=None):
        self.calls.append((system_prompt, messages))
        for chunk in self.chunks:
            yield chunk


class TestQueryService:
    """Tests for the QueryService class"""

    def test_initialization_builds_postgres_handler(self, analyst_settings):
        with patch("db_analyst.services.PgConnector") as mock_connector, patch(
            "db_analyst.services.PgHandler"
        ) as mock_pg_handler:
            mock_pg_handler.return_value.connector.dialect = DatabaseDialects.POSTGRESQL

            service = QueryService(analyst_settings)

            mock_connector.from_settings.assert_called_once_with(analyst_settings)
            mock_pg_handler.assert_called_once_with(mock_connector.from_settings.return_value)
            assert service.db_dialect == DatabaseDialects.POSTGRESQL

    def test_execute_query_success(self, analyst_settings, mock_handler):
        service = QueryService(analyst_settings, handler=mock_handler)

        rows = service.execute_query("SELECT * FROM public.users")

        mock_handler.execute_query.assert_called_once_with("SELECT * FROM public.users")
        assert rows == [{"id": 1}]

    def test_rejected_query_never_reaches_database(self, analyst_settings, mock_handler):
        service = QueryService(analyst_settings, handler=mock_handler)

        with pytest.raises(QueryValidationError) as exc:
            service.execute_query("DELETE FROM public.users")

        assert exc.value.reason == "The query must start with SELECT."
        mock_handler.execute_query.assert_not_called()

    def test_execution_errors_propagate(self, analyst_settings, mock_handler):
        mock_handler.execute_query.side_effect = QueryExecutionError("SQL execution failed: boom")
        service = QueryService(analyst_settings, handler=mock_handler)

        with pytest.raises(QueryExecutionError):
            service.execute_query("SELECT 1")

    @pytest.mark.asyncio
    async def test_aexecute_query(self, analyst_settings, mock_handler):
        service = QueryService(analyst_settings, handler=mock_handler)

        rows = await service.aexecute_query("SELECT 1")

        assert rows == [{"id": 1}]

    def test_get_db_schema_uses_default_schema(self, analyst_settings, mock_handler):
        service = QueryService(analyst_settings, handler=mock_handler)

        schema = service.get_db_schema()

        mock_handler.get_schema.assert_called_once_with("public", None)
        assert schema.startswith("Schema: public")

    def test_get_db_schema_error_returns_empty(self, analyst_settings, mock_handler):
        mock_handler.get_schema.side_effect = QueryExecutionError("no connection")
        service = QueryService(analyst_settings, handler=mock_handler)

        assert service.get_db_schema() == ""

    def test_close_disconnects(self, analyst_settings, mock_handler):
        QueryService(analyst_settings, handler=mock_handler).close()
        mock_handler.connector.disconnect.assert_called_once()


class TestChatService:
    """Tests for the ChatService class"""

    def make_service(self, analyst_settings, mock_handler, chunks=("Hello",), config=None):
        config = config or analyst_settings
        return ChatService(
            config,
            query_service=QueryService(config, handler=mock_handler),
            llm_adapter=FakeLLMAdapter(list(chunks)),
            storage=InMemoryConversationStorage(),
        )

    def test_initialization_defaults(self, analyst_settings):
        with patch("db_analyst.services.QueryService") as mock_query_service, patch(
            "db_analyst.services.LLMAdapter"
        ) as mock_llm_adapter, patch(
            "db_analyst.services.get_conversation_storage"
        ) as mock_get_storage:
            service = ChatService(analyst_settings)

            assert service.query_service == mock_query_service.return_value
            assert service.llm_adapter == mock_llm_adapter.get_adapter.return_value
            assert service.conversation_storage == mock_get_storage.return_value
            assert service.context_limit == 10

    def test_create_conversation_and_messages(self, analyst_settings, mock_handler):
        service = self.make_service(analyst_settings, mock_handler)

        cid = service.create_conversation()
        message = service.create_message(cid, "user", "hi")

        assert service.get_messages(cid) == [message]
        assert service.get_message(cid, message["id"]) == message

    def test_build_system_prompt(self, analyst_settings, mock_handler):
        service = self.make_service(analyst_settings, mock_handler)

        prompt = service.build_system_prompt()

        assert AUTO_EXECUTE_TAG in prompt
        assert "Table: users" in prompt
        assert "PostgreSQL" in prompt

    def test_build_messages_respects_context_limit(self, mock_handler):
        config = load_settings({"CONTEXT_LIMIT": 2})
        service = ChatService(
            config,
            query_service=QueryService(config, handler=mock_handler),
            llm_adapter=FakeLLMAdapter([]),
            storage=InMemoryConversationStorage(),
        )
        cid = service.create_conversation()
        for i in range(4):
            service.create_message(cid, "user" if i % 2 == 0 else "assistant", f"m{i}")

        messages = service._build_messages_for_llm(cid)

        assert messages == [
            {"role": "user", "content": "m2"},
            {"role": "assistant", "content": "m3"},
        ]

    @pytest.mark.asyncio
    async def test_stream_reply(self, analyst_settings, mock_handler):
        reply = [AUTO_EXECUTE_TAG, "\n```sql\nSELECT count(*) ", "FROM public.users\n```"]
        service = self.make_service(analyst_settings, mock_handler, chunks=reply)

        chunks = [c async for c in service.stream_reply("how many users?")]

        assert [c["type"] for c in chunks] == [
            "llm_stream_start",
            "llm_token",
            "llm_token",
            "llm_token",
            "llm_stream_end",
        ]
        start, end = chunks[0], chunks[-1]
        assert end["message"] == "".join(reply)
        assert end["message_id"] == start["message_id"]
        assert {c["conversation_id"] for c in chunks} == {start["conversation_id"]}

        stored = service.get_messages(start["conversation_id"])
        assert [m["role"] for m in stored] == ["user", "assistant"]
        assert stored[1]["id"] == start["message_id"]
        assert stored[1]["content"] == "".join(reply)

        system_prompt, messages = service.llm_adapter.calls[0]
        assert "Table: users" in system_prompt
        assert messages == [{"role": "user", "content": "how many users?"}]

    @pytest.mark.asyncio
    async def test_stream_reply_reuses_existing_conversation(self, analyst_settings, mock_handler):
        service = self.make_service(analyst_settings, mock_handler)
        cid = service.create_conversation()

        chunks = [c async for c in service.stream_reply("hi", cid)]

        assert chunks[0]["conversation_id"] == cid

    @pytest.mark.asyncio
    async def test_stream_reply_unknown_conversation_starts_new_one(
        self, analyst_settings, mock_handler
    ):
        service = self.make_service(analyst_settings, mock_handler)

        chunks = [c async for c in service.stream_reply("hi", "missing")]

        assert chunks[0]["conversation_id"] != "missing"

    def test_build_system_prompt_for_agent(self, mock_handler):
        config = load_settings(
            {"AGENTS": {"sales": {"NAME": "Sales analyst", "TABLES": ["public.Orders"]}}}
        )
        service = self.make_service(config, mock_handler)

        prompt = service.build_system_prompt(config.get_agent("sales"))

        mock_handler.get_schema.assert_called_once_with("public", ["orders"])
        assert prompt.startswith("You are Sales analyst")
        assert "public.orders" in prompt

    def test_build_system_prompt_unrestricted_agent_reads_all_tables(self, mock_handler):
        config = load_settings({"AGENTS": {"general": {"NAME": "Generalist"}}})
        service = self.make_service(config, mock_handler)

        service.build_system_prompt(config.get_agent("general"))

        mock_handler.get_schema.assert_called_once_with("public", None)

    @pytest.mark.asyncio
    async def test_stream_reply_uses_agent(self, mock_handler):
        config = load_settings(
            {"AGENTS": {"sales": {"NAME": "Sales analyst", "TABLES": ["orders"]}}}
        )
        service = self.make_service(config, mock_handler)

        [c async for c in service.stream_reply("top customers?", agent_id="sales")]

        system_prompt, _ = service.llm_adapter.calls[0]
        assert system_prompt.startswith("You are Sales analyst")
        mock_handler.get_schema.assert_called_once_with("public", ["orders"])

    @pytest.mark.asyncio
    async def test_stream_reply_unknown_agent_uses_default_persona(
        self, analyst_settings, mock_handler
    ):
        service = self.make_service(analyst_settings, mock_handler)

        [c async for c in service.stream_reply("hi", agent_id="missing")]

        system_prompt, _ = service.llm_adapter.calls[0]
        assert system_prompt.startswith("You are an assistant specialised")


def test_get_app_settings():
    config = get_app_settings()
    assert config.enable_websockets is True
    assert config.allowed_schemas == ("public",)
