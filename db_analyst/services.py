"""Core services for the database analyst application."""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

from asgiref.sync import sync_to_async
from django.apps import apps

from . import prompts
from .conf import AnalystAgent, AnalystSettings
from .connectors.handlers.base import BaseHandler
from .connectors.postgres.pg_connector import PgConnector
from .connectors.postgres.pg_handler import PgHandler
from .constants import DatabaseDialects
from .errors import QueryExecutionError, QueryValidationError
from .llm_adapter import LLMAdapter
from .storage import ConversationStorage, get_conversation_storage
from .validator import QueryValidator, ValidationPolicy, ValidationResult

logger = logging.getLogger(__name__)


def get_app_settings() -> AnalystSettings:
    """Settings resolved when the ``db_analyst`` app became ready."""
    return apps.get_app_config("db_analyst").analyst_settings


class QueryService:
    """Validates SQL statements and executes the accepted ones.

    This is the execution collaborator behind both the HTTP endpoint and the
    websocket orchestrator, so every path applies the same validation policy.

    Attributes:
        config (AnalystSettings): Resolved application settings.
        validator (QueryValidator): Validator built from the configured policy.
        db_handler (BaseHandler): Runs statements and reads metadata.
        db_dialect (str): The database dialect (e.g., "PostgreSQL").
    """

    def __init__(self, config: AnalystSettings, handler: Optional[BaseHandler] = None):
        self.config = config
        self.policy = ValidationPolicy.from_settings(config)
        self.validator = QueryValidator(self.policy)
        self.db_handler = handler or PgHandler(PgConnector.from_settings(config))
        self.db_dialect = getattr(
            self.db_handler.connector, "dialect", DatabaseDialects.SQL
        )
        self.aexecute_query = sync_to_async(self.execute_query, thread_sensitive=False)

    def validate(self, sql_query: str) -> ValidationResult:
        return self.validator.validate(sql_query)

    def execute_query(self, sql_query: str) -> List[Dict[str, Any]]:
        """Validate *sql_query* and run it against the database.

        Raises:
            QueryValidationError: If the statement is rejected; the database is
                never contacted in that case.
            QueryExecutionError: If the database fails to run the statement.
        """
        result = self.validate(sql_query)
        if not result.valid:
            raise QueryValidationError(result.error)

        logger.info(f"Attempting to execute SQL query: {sql_query[:100]}...")
        return self.db_handler.execute_query(sql_query)

    def get_db_schema(self, tables: Optional[List[str]] = None) -> str:
        """Metadata listing of the default schema, or "" if it cannot be read."""
        try:
            return self.db_handler.get_schema(self.config.default_schema, tables)
        except QueryExecutionError as e:
            logger.warning(f"Continuing without schema metadata: {e}")
            return ""

    def close(self) -> None:
        self.db_handler.connector.disconnect()


class ChatService:
    """Runs the analyst conversation: history, prompt, and streamed replies.

    Attributes:
        config (AnalystSettings): Resolved application settings.
        query_service (QueryService): Validation, execution and metadata.
        llm_adapter (LLMAdapter): Streams replies from the configured provider.
        conversation_storage (ConversationStorage): Message persistence.
        context_limit (int): Maximum number of past messages sent to the LLM.
    """

    def __init__(
        self,
        config: AnalystSettings,
        query_service: Optional[QueryService] = None,
        llm_adapter: Optional[LLMAdapter] = None,
        storage: Optional[ConversationStorage] = None,
    ):
        self.config = config
        self.query_service = query_service or QueryService(config)
        self.llm_adapter = llm_adapter or LLMAdapter.get_adapter(config)
        self.conversation_storage = storage or get_conversation_storage(config)
        self.context_limit = config.context_limit
        logger.info("ChatService initialized successfully.")

    def create_conversation(self) -> str:
        conversation_id = self.conversation_storage.create_conversation()
        logger.info(f"Created new conversation with ID: {conversation_id}")
        return conversation_id

    def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        return self.conversation_storage.create_message(
            conversation_id, role, content, message_id=message_id
        )

    def get_messages(self, conversation_id: str) -> List[Dict[str, Any]]:
        return self.conversation_storage.get_messages(conversation_id)

    def get_message(self, conversation_id: str, message_id: str) -> Optional[Dict[str, Any]]:
        return self.conversation_storage.get_message(conversation_id, message_id)

    def build_system_prompt(self, agent: Optional[AnalystAgent] = None) -> str:
        """System prompt with schema metadata, narrowed to the agent's tables if any."""
        tables = list(agent.tables) if agent and agent.tables else None
        metadata_context = self.query_service.get_db_schema(tables)
        return prompts.get_analyst_system_prompt(
            metadata_context,
            self.config.default_schema,
            db_dialect=self.query_service.db_dialect,
            agent=agent,
        )

    def resolve_agent(self, agent_id: Optional[str]) -> Optional[AnalystAgent]:
        agent = self.config.get_agent(agent_id)
        if agent_id and agent is None:
            logger.warning(f"Unknown agent {agent_id!r}; using the default analyst")
        return agent

    def _build_messages_for_llm(self, conversation_id: str) -> List[Dict[str, str]]:
        history = self.conversation_storage.get_messages(
            conversation_id, limit=self.context_limit
        )
        return [
            {"role": msg["role"], "content": msg.get("content", "")}
            for msg in history
            if msg.get("role") in ("user", "assistant")
        ]

    async def stream_reply(
        self,
        user_query: str,
        conversation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Store the user's message and stream the assistant's reply.

        *agent_id* selects a configured agent persona; unknown ids fall back to
        the default analyst.

        Yields:
            dict: ``llm_stream_start`` (with the id the reply will be stored
            under), then one ``llm_token`` per chunk, then ``llm_stream_end``
            once the full reply has been persisted.
        """
        if not conversation_id or not self.conversation_storage.conversation_exists(
            conversation_id
        ):
            conversation_id = self.create_conversation()

        self.create_message(conversation_id, "user", user_query)
        reply_id = self.conversation_storage.new_message_id()
        yield {
            "type": "llm_stream_start",
            "message_id": reply_id,
            "conversation_id": conversation_id,
        }

        agent = self.resolve_agent(agent_id)
        system_prompt = await sync_to_async(
            self.build_system_prompt, thread_sensitive=False
        )(agent)
        messages_for_llm = self._build_messages_for_llm(conversation_id)

        full_message = ""
        async for token in self.llm_adapter.stream_text(system_prompt, messages_for_llm):
            full_message += token
            yield {
                "type": "llm_token",
                "token": token,
                "message_id": reply_id,
                "conversation_id": conversation_id,
            }

        self.create_message(conversation_id, "assistant", full_message, message_id=reply_id)
        yield {
            "type": "llm_stream_end",
            "message": full_message,
            "message_id": reply_id,
            "conversation_id": conversation_id,
        }
