import asyncio
import json
import logging
from typing import Any, Dict, Optional, Set

from channels.exceptions import DenyConnection
from channels.generic.websocket import AsyncWebsocketConsumer
from django.apps import apps
from django.core.serializers.json import DjangoJSONEncoder

from .orchestrator import ExecutionOrchestrator
from .parser import ParsedAssistantContent, parse_assistant_content
from .services import ChatService

logger = logging.getLogger(__name__)


class ChatConsumer(AsyncWebsocketConsumer):
    """
    WebSocket consumer for the analyst chat.

    Streams assistant replies, re-parses them into SQL blocks as they grow and
    drives one ExecutionOrchestrator per connection, so every displayed
    message keeps its execution state for as long as the socket is open.

    Client messages:
        {"type": "chat", "query": "...", "conversation_id": "optional", "agent_id": "optional"}
        {"type": "execute", "message_id": "...", "block_id": "sql-0"}
        {"type": "open_conversation", "conversation_id": "..."}
    """

    chat_service: Optional[ChatService] = None
    orchestrator: Optional[ExecutionOrchestrator] = None

    async def connect(self):
        """
        Called when the websocket is trying to connect.
        Accepts the connection only if the WebSocket feature is enabled.
        """
        app_config = apps.get_app_config("db_analyst")
        config = app_config.analyst_settings
        if not config.enable_websockets:
            raise DenyConnection("WebSocket feature not enabled.")

        try:
            self.chat_service = ChatService(config, storage=app_config.get_storage())
        except Exception as e:
            logger.exception(f"Could not start chat session: {e}")
            raise DenyConnection("Chat service unavailable.") from e

        self.config = config
        self.orchestrator = ExecutionOrchestrator(
            self.chat_service.query_service.aexecute_query, on_event=self.send_event
        )
        self.conversation_id = None
        self.displayed: Dict[str, str] = {}
        self.pending: Set[asyncio.Future] = set()

        await self.accept()
        await self.send_status("Connection established. Waiting for query...")

    async def disconnect(self, close_code):
        """
        Called when the WebSocket closes for any reason.

        Args:
            close_code (int): The WebSocket close code.
        """
        logger.info(f"WebSocket connection closed with code: {close_code}")
        for task in list(getattr(self, "pending", ())):
            task.cancel()
        if self.orchestrator:
            self.orchestrator.forget_all()
        if self.chat_service:
            self.chat_service.query_service.close()

    async def receive(self, text_data):
        """
        Called when a message is received from the WebSocket.
        Dispatches on the message ``type``; messages without one are chat turns.
        """
        try:
            data = json.loads(text_data)
            message_type = data.get("type") or "chat"
            handler = {
                "chat": self.handle_chat,
                "execute": self.handle_execute,
                "open_conversation": self.handle_open_conversation,
            }.get(message_type)

            if handler is None:
                await self.send_error(f"Unsupported message type: {message_type}")
                return

            await handler(data)

        except json.JSONDecodeError:
            logger.warning("Invalid JSON received in ChatConsumer.")
            await self.send_error("Invalid JSON received.")
        except DenyConnection as e:
            logger.warning(f"Connection denied in ChatConsumer: {e}")
            raise
        except Exception as e:
            logger.exception(f"Unhandled exception in ChatConsumer receive: {e}")
            await self.send_error("An unexpected server error occurred.")

    async def handle_chat(self, data):
        query = data.get("query")
        if not query:
            await self.send_error("Missing 'query' in message.")
            return

        await self.send_status(f"Streaming response for: '{query[:50]}...'")
        conversation_id = data.get("conversation_id") or self.conversation_id
        agent_id = data.get("agent_id")
        message_id = None
        streamed = ""
        last_blocks = []

        try:
            async for chunk in self.chat_service.stream_reply(
                query, conversation_id, agent_id=agent_id
            ):
                chunk_type = chunk.get("type")

                if chunk_type == "llm_stream_start":
                    self._switch_conversation(chunk["conversation_id"])
                    message_id = chunk["message_id"]
                    await self.send_event(chunk)

                elif chunk_type == "llm_token":
                    streamed += chunk["token"]
                    self.displayed[message_id] = streamed
                    await self.send_event(chunk)
                    parsed = parse_assistant_content(streamed)
                    blocks = [block.to_dict() for block in parsed.sql_blocks]
                    if blocks != last_blocks:
                        last_blocks = blocks
                        await self.send_sql_blocks(message_id, parsed, final=False)
                    if self.config.auto_execute_while_streaming:
                        self._track(self.orchestrator.observe(message_id, parsed))

                elif chunk_type == "llm_stream_end":
                    self.displayed[message_id] = chunk["message"]
                    await self.send_event(chunk)
                    parsed = parse_assistant_content(chunk["message"])
                    await self.send_sql_blocks(message_id, parsed, final=True)
                    self._track(self.orchestrator.observe(message_id, parsed))

        except Exception as e:
            logger.exception(f"Error during streaming query: {e}")
            await self.send_error(f"Streaming error: {str(e)}")

    async def handle_execute(self, data):
        """Manually (re-)execute one SQL block of a displayed message."""
        message_id = data.get("message_id")
        block_id = data.get("block_id")
        if not message_id or not block_id:
            await self.send_error("Missing 'message_id' or 'block_id' in message.")
            return

        content = self.displayed.get(message_id)
        if content is None and self.conversation_id:
            message = self.chat_service.get_message(self.conversation_id, message_id)
            if message and message.get("role") == "assistant":
                content = message.get("content", "")
                self.displayed[message_id] = content
        if content is None:
            await self.send_error(f"Unknown message: {message_id}")
            return

        block = parse_assistant_content(content).get_block(block_id)
        if block is None:
            await self.send_error(f"Unknown SQL block '{block_id}' in message {message_id}")
            return

        if self.orchestrator.is_executing(message_id, block):
            await self.send_status(f"Query {block.id} is already running.")
            return

        self._track([asyncio.ensure_future(self.orchestrator.execute(message_id, block))])

    async def handle_open_conversation(self, data):
        """Load a stored conversation and display its messages."""
        conversation_id = data.get("conversation_id")
        if not conversation_id:
            await self.send_error("Missing 'conversation_id' in message.")
            return

        messages = self.chat_service.get_messages(conversation_id)
        self._switch_conversation(conversation_id)

        payload = []
        parsed_by_id = {}
        for message in messages:
            entry = dict(message)
            if message.get("role") == "assistant":
                parsed = parse_assistant_content(message.get("content", ""))
                parsed_by_id[message["id"]] = parsed
                self.displayed[message["id"]] = message.get("content", "")
                entry["parsed"] = parsed.to_dict()
            payload.append(entry)

        await self.send_event(
            {"type": "conversation", "conversation_id": conversation_id, "messages": payload}
        )
        for message_id, parsed in parsed_by_id.items():
            self._track(self.orchestrator.observe(message_id, parsed))

    def _switch_conversation(self, conversation_id: str) -> None:
        """Drop execution state of messages that are no longer displayed."""
        if self.conversation_id and self.conversation_id != conversation_id:
            for message_id in self.displayed:
                self.orchestrator.forget(message_id)
            self.displayed.clear()
        self.conversation_id = conversation_id

    def _track(self, tasks) -> None:
        for task in tasks:
            self.pending.add(task)
            task.add_done_callback(self.pending.discard)

    async def send_sql_blocks(self, message_id: str, parsed: ParsedAssistantContent, final: bool):
        await self.send_event(
            {
                "type": "sql_blocks",
                "message_id": message_id,
                "final": final,
                **parsed.to_dict(),
                "executions": self.orchestrator.snapshot(message_id),
            }
        )

    async def send_event(self, event: Dict[str, Any]):
        """Serialize an event (rows may hold dates and decimals) and send it."""
        await self.send(text_data=json.dumps(event, cls=DjangoJSONEncoder))

    async def send_error(self, message):
        """Helper method to send an error message back to the client."""
        await self.send(text_data=json.dumps({"type": "error", "message": message}))

    async def send_status(self, message):
        """Helper method to send a status update message back to the client."""
        await self.send(text_data=json.dumps({"type": "status", "message": message}))
