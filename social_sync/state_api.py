"""
Read/write facade used by the inbox UI.

Reads come straight from the unified store; writes are forwarded through
the sync engine so platform side effects stay in one place.
"""

import logging
from typing import Callable, Optional

from social_sync.errors import SendFailed
from social_sync.schemas import (
    ConnectionResponse,
    ConversationResponse,
    MessageResponse,
    MutationRequest,
    MutationResponse,
    StateResponse,
)
from social_sync.sync_engine import SyncEngine
from social_sync.unified_store import ChangeEvent, UnifiedStore

logger = logging.getLogger(__name__)


class StateAPI:
    def __init__(self, store: UnifiedStore, engine: SyncEngine, message_window: int = 50):
        self._store = store
        self._engine = engine
        self._message_window = message_window

    def get_state(self, message_window: Optional[int] = None) -> StateResponse:
        """Current connections, conversations (newest first) and recent messages."""
        snapshot = self._store.snapshot(message_window or self._message_window)
        return StateResponse(
            connections=[ConnectionResponse.model_validate(c) for c in snapshot.connections],
            conversations=[ConversationResponse.model_validate(c) for c in snapshot.conversations],
            messages=[MessageResponse.model_validate(m) for m in snapshot.messages],
        )

    async def mark_read(self, conversation_id: str) -> ConversationResponse:
        conversation = await self._engine.mark_read(conversation_id)
        return ConversationResponse.model_validate(conversation)

    async def submit_message(self, conversation_id: str, body: str) -> MessageResponse:
        """Returns the provisional message; delivery completes in the background."""
        message = await self._engine.send_message(conversation_id, body)
        return MessageResponse.model_validate(message)

    async def apply_mutation(self, request: MutationRequest) -> MutationResponse:
        if request.action == "mark_read":
            conversation = await self.mark_read(request.conversation_id)
            return MutationResponse(success=True, conversation=conversation)

        if not request.body:
            raise SendFailed("Message body is required")
        message = await self.submit_message(request.conversation_id, request.body)
        return MutationResponse(success=True, message=message)

    def subscribe(self, callback: Callable[[ChangeEvent], None]) -> Callable[[], None]:
        return self._store.subscribe(callback)
