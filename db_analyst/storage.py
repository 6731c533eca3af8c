"""Conversation and message storage for the db_analyst application."""

import json
import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import redis

from .conf import AnalystSettings

logger = logging.getLogger(__name__)


def _new_message(
    role: str, content: str, message_id: Optional[str] = None
) -> Dict[str, Any]:
    return {
        "id": message_id or str(uuid.uuid4()),
        "role": role,
        "content": content,
        "created_at": datetime.now(timezone.utc).isoformat(),
    }


class ConversationStorage(ABC):
    """Abstract base class for conversation storage implementations.

    Messages are plain dicts with ``id``, ``role``, ``content`` and
    ``created_at`` keys, returned in chronological order.
    """

    @abstractmethod
    def create_conversation(self) -> str:
        """Create a new, empty conversation and return its identifier."""
        pass

    @abstractmethod
    def create_message(
        self,
        conversation_id: str,
        role: str,
        content: str,
        message_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Append a message to a conversation.

        Args:
            conversation_id: The conversation to append to.
            role: ``user`` or ``assistant``.
            content: The full message text.
            message_id: Identifier to store the message under; generated when
                omitted.

        Returns:
            The stored message, including its generated ``id``.
        """
        pass

    @abstractmethod
    def get_messages(
        self, conversation_id: str, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        """Return the conversation's messages, optionally only the last *limit*."""
        pass

    @abstractmethod
    def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation. Returns True on success."""
        pass

    @abstractmethod
    def conversation_exists(self, conversation_id: str) -> bool:
        """Check if a conversation exists."""
        pass

    def new_message_id(self) -> str:
        """Reserve an identifier for a message that will be stored later."""
        return str(uuid.uuid4())

    def get_message(
        self, conversation_id: str, message_id: str
    ) -> Optional[Dict[str, Any]]:
        """Look up a single message by id."""
        for message in self.get_messages(conversation_id):
            if message.get("id") == message_id:
                return message
        return None


class RedisConversationStorage(ConversationStorage):
    """Redis-based storage: one list of JSON messages per conversation."""

    def __init__(self, redis_url: str, ttl_seconds: int = 60 * 60 * 24 * 7):
        """Initialize Redis connection.

        Args:
            redis_url: Redis connection URL.
            ttl_seconds: Expiry applied (and refreshed) on every write.
        """
        self.redis_url = redis_url
        self.ttl_seconds = ttl_seconds

        try:
            self.redis_client = redis.Redis.from_url(self.redis_url)
            self.redis_client.ping()
            logger.info(f"Connected to Redis at {self.redis_url}")
        except Exception as e:
            logger.warning(f"Failed to connect to Redis at {self.redis_url}: {e}")
            self.redis_client = None

    def _get_conversation_key(self, conversation_id: str) -> str:
        return f"db_analyst:conversation:{conversation_id}"

    def _get_marker_key(self, conversation_id: str) -> str:
        return f"db_analyst:conversation:{conversation_id}:created"

    def create_conversation(self) -> str:
        conversation_id = str(uuid.uuid4())
        if self.redis_client:
            try:
                self.redis_client.set(
                    self._get_marker_key(conversation_id),
                    datetime.now(timezone.utc).isoformat(),
                    ex=self.ttl_seconds,
                )
            except Exception as e:
                logger.error(f"Error creating conversation in Redis: {e}")
        return conversation_id

    def create_message(self, conversation_id, role, content, message_id=None):
        message = _new_message(role, content, message_id)
        if not self.redis_client:
            logger.debug("Redis client not available, message not persisted")
            return message

        try:
            conversation_key = self._get_conversation_key(conversation_id)
            self.redis_client.rpush(conversation_key, json.dumps(message))
            self.redis_client.expire(conversation_key, self.ttl_seconds)
            self.redis_client.expire(
                self._get_marker_key(conversation_id), self.ttl_seconds
            )
        except Exception as e:
            logger.error(f"Error saving message to Redis: {e}")
        return message

    def get_messages(self, conversation_id, limit=None):
        if not self.redis_client:
            logger.debug("Redis client not available, returning empty conversation")
            return []

        try:
            start = -limit if limit else 0
            raw_messages = self.redis_client.lrange(
                self._get_conversation_key(conversation_id), start, -1
            )
            return [json.loads(raw) for raw in raw_messages]
        except Exception as e:
            logger.error(f"Error retrieving conversation from Redis: {e}")
            return []

    def delete_conversation(self, conversation_id):
        if not self.redis_client:
            return False
        try:
            self.redis_client.delete(
                self._get_conversation_key(conversation_id),
                self._get_marker_key(conversation_id),
            )
            return True
        except Exception as e:
            logger.error(f"Error deleting conversation from Redis: {e}")
            return False

    def conversation_exists(self, conversation_id):
        if not self.redis_client:
            return False
        return bool(
            self.redis_client.exists(
                self._get_conversation_key(conversation_id),
                self._get_marker_key(conversation_id),
            )
        )


class InMemoryConversationStorage(ConversationStorage):
    """In-memory storage scoped to the instance.

    Conversations do not survive a restart. Use for development and tests.
    """

    def __init__(self):
        self._conversations: Dict[str, List[Dict[str, Any]]] = {}

    def create_conversation(self):
        conversation_id = str(uuid.uuid4())
        self._conversations[conversation_id] = []
        return conversation_id

    def create_message(self, conversation_id, role, content, message_id=None):
        message = _new_message(role, content, message_id)
        self._conversations.setdefault(conversation_id, []).append(message)
        return message

    def get_messages(self, conversation_id, limit=None):
        messages = self._conversations.get(conversation_id, [])
        if limit is not None and limit > 0:
            messages = messages[-limit:]
        return list(messages)

    def delete_conversation(self, conversation_id):
        self._conversations.pop(conversation_id, None)
        return True

    def conversation_exists(self, conversation_id):
        return conversation_id in self._conversations


def get_conversation_storage(config: AnalystSettings) -> ConversationStorage:
    """Build the storage backend selected by ``CONVERSATION_STORAGE_TYPE``.

    Falls back to in-memory storage when Redis is unreachable or the type is
    unknown.
    """
    storage_type = config.conversation_storage_type

    if storage_type == "redis":
        storage = RedisConversationStorage(
            redis_url=config.redis_url, ttl_seconds=config.conversation_ttl_seconds
        )
        if storage.redis_client:
            return storage
        logger.warning("Failed to connect to Redis, falling back to in-memory storage")
        return InMemoryConversationStorage()

    if storage_type not in ("memory", "in_memory", "inmemory"):
        logger.warning(
            f"Unknown storage type '{storage_type}', falling back to in-memory storage"
        )
    return InMemoryConversationStorage()
