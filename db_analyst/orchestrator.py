"""Execution bookkeeping for SQL blocks displayed in a chat session.

One ``ExecutionOrchestrator`` lives as long as the view that displays the
messages (a websocket connection).  State is keyed by message id plus the
block's content fingerprint, so re-parsing a growing streamed reply never
resets or duplicates executions.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .parser import ParsedAssistantContent, ParsedSqlBlock

logger = logging.getLogger(__name__)

ExecuteQuery = Callable[[str], Awaitable[List[Dict[str, Any]]]]
EventSink = Callable[[Dict[str, Any]], Awaitable[None]]


class ExecutionStatus(str, Enum):
    IDLE = "idle"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass
class ExecutionState:
    """Execution state of one block of one message.

    ``result`` keeps the rows of the last successful run, including while a
    re-run is in flight or after a re-run failed.  ``status`` distinguishes an
    empty successful result from a failure.
    """

    attempted: bool = False
    executing: bool = False
    result: Optional[List[Dict[str, Any]]] = None
    status: ExecutionStatus = ExecutionStatus.IDLE
    error: Optional[str] = None

    @property
    def has_results(self) -> bool:
        return self.result is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "executing": self.executing,
            "status": self.status.value,
            "row_count": len(self.result) if self.result is not None else None,
            "error": self.error,
        }


class ExecutionOrchestrator:
    """Runs SQL blocks through an execution collaborator and tracks their state.

    Args:
        execute_query: Coroutine function that validates and runs a statement,
            returning rows as a list of dicts and raising on failure.
        on_event: Optional coroutine function receiving ``query_executing``,
            ``query_result`` and ``query_error`` events.
    """

    def __init__(self, execute_query: ExecuteQuery, on_event: Optional[EventSink] = None):
        self._execute_query = execute_query
        self._on_event = on_event
        self._states: Dict[str, ExecutionState] = {}
        self._auto_attempted: Set[str] = set()
        self._running: Dict[str, ExecutionState] = {}
        self._blocks_by_key: Dict[str, ParsedSqlBlock] = {}

    @staticmethod
    def block_key(message_id: str, block: ParsedSqlBlock) -> str:
        return f"{message_id}:{block.key}"

    def get_state(self, message_id: str, block: ParsedSqlBlock) -> Optional[ExecutionState]:
        return self._states.get(self.block_key(message_id, block))

    def has_results(self, message_id: str, block: ParsedSqlBlock) -> bool:
        state = self.get_state(message_id, block)
        return bool(state and state.has_results)

    def is_executing(self, message_id: str, block: ParsedSqlBlock) -> bool:
        return self.block_key(message_id, block) in self._running

    def snapshot(self, message_id: str) -> Dict[str, Dict[str, Any]]:
        """Serializable state of every tracked block of *message_id*, by block id."""
        prefix = f"{message_id}:"
        return {
            self._blocks_by_key[key].id: state.to_dict()
            for key, state in self._states.items()
            if key.startswith(prefix) and key in self._blocks_by_key
        }

    def observe(self, message_id: str, parsed: ParsedAssistantContent) -> List[asyncio.Task]:
        """Schedule automatic execution for newly seen auto-execute blocks.

        Each (message, block) key is auto-executed at most once for the lifetime
        of this orchestrator, however often the message is re-parsed.

        Returns:
            The tasks created for blocks scheduled by this call.
        """
        tasks = []
        for block in parsed.sql_blocks:
            if not block.auto_execute:
                continue

            key = self.block_key(message_id, block)
            if key in self._auto_attempted:
                continue

            self._auto_attempted.add(key)
            logger.info(f"Auto-executing SQL block {block.id} of message {message_id}")
            tasks.append(asyncio.ensure_future(self.execute(message_id, block)))
        return tasks

    async def execute(
        self, message_id: str, block: ParsedSqlBlock
    ) -> Optional[ExecutionState]:
        """Run *block* once, manually or on behalf of ``observe``.

        Concurrent requests for a key that is already executing are dropped, not
        queued.  Rows from a previous run stay in place until the new run
        settles.

        Returns:
            The settled state, or None if the request was suppressed or the
            message was forgotten while the query was running.
        """
        key = self.block_key(message_id, block)
        if key in self._running:
            logger.debug(f"Ignoring duplicate execution request for {key}")
            return None

        self._blocks_by_key[key] = block
        state = self._states.setdefault(key, ExecutionState())
        self._running[key] = state
        state.attempted = True
        state.executing = True
        state.status = ExecutionStatus.EXECUTING
        await self._emit("query_executing", message_id, block)

        try:
            rows = await self._execute_query(block.query)
        except Exception as e:
            if self._states.get(key) is not state:
                logger.info(f"Discarding late error for forgotten block {key}: {e}")
                return None
            logger.warning(f"Execution of SQL block {key} failed: {e}")
            state.status = ExecutionStatus.FAILED
            state.error = str(e) or e.__class__.__name__
            await self._emit("query_error", message_id, block, message=state.error)
            return state
        else:
            if self._states.get(key) is not state:
                logger.info(f"Discarding late result for forgotten block {key}")
                return None
            state.result = list(rows or [])
            state.status = ExecutionStatus.SUCCEEDED
            state.error = None
            await self._emit(
                "query_result",
                message_id,
                block,
                rows=state.result,
                row_count=len(state.result),
            )
            return state
        finally:
            state.executing = False
            if self._running.get(key) is state:
                del self._running[key]

    def forget(self, message_id: str) -> None:
        """Drop all state for a message that is no longer displayed."""
        prefix = f"{message_id}:"
        for key in [k for k in self._states if k.startswith(prefix)]:
            del self._states[key]
            self._blocks_by_key.pop(key, None)
        # runs still in flight are orphaned; their results are discarded
        for key in [k for k in self._running if k.startswith(prefix)]:
            del self._running[key]
        self._auto_attempted = {k for k in self._auto_attempted if not k.startswith(prefix)}

    def forget_all(self) -> None:
        self._states.clear()
        self._blocks_by_key.clear()
        self._auto_attempted.clear()
        self._running.clear()

    async def _emit(self, event_type: str, message_id: str, block: ParsedSqlBlock, **payload):
        if not self._on_event:
            return
        event = {
            "type": event_type,
            "message_id": message_id,
            "block_id": block.id,
            "block_key": block.key,
            **payload,
        }
        try:
            await self._on_event(event)
        except Exception as e:
            logger.exception(f"Error delivering {event_type} event: {e}")
