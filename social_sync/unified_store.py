"""
Unified, platform-agnostic store of conversations and messages.

Besides storage it owns change notification: every successful mutation
publishes a ``ChangeEvent`` to the subscribers registered with
``subscribe``. Writes to one conversation are serialized under a lock keyed
by (connection_id, external_thread_id); different conversations proceed in
parallel. The unique constraints on the tables back the locks up, so an
``IntegrityError`` on insert is treated as a duplicate delivery.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Hashable, Iterator, Optional

from sqlalchemy import desc, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, sessionmaker

from social_sync import credential_store
from social_sync.errors import ConversationReadOnly, NotFound
from social_sync.models import (
    Connection,
    ConnectionStatus,
    Conversation,
    DeliveryState,
    Direction,
    Message,
)
from social_sync.platforms.base import ExternalMessage
from social_sync.utils import as_utc, new_id, utcnow

logger = logging.getLogger(__name__)


class UpsertResult(str, Enum):
    CREATED = "created"
    DUPLICATE = "duplicate"
    # connection no longer active; nothing written
    DISCARDED = "discarded"


@dataclass(frozen=True)
class ChangeEvent:
    entity: str  # connection, conversation, message
    action: str  # created, updated, deleted
    ids: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"entity": self.entity, "action": self.action, "ids": dict(self.ids)}


@dataclass
class StateSnapshot:
    connections: list[Connection]
    conversations: list[Conversation]
    messages: list[Message]


ChangeCallback = Callable[[ChangeEvent], None]


class KeyedLock:
    """A mutex per key, created on demand and dropped once unused."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[Hashable, list] = {}

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    self._locks.pop(key, None)


def merge_participants(current: list[dict], incoming: list[dict]) -> list[dict]:
    """Union by id, ordered by id; a known name is never replaced by None."""
    merged: dict[str, dict] = {}
    for participant in list(current or []) + list(incoming or []):
        pid = participant.get("id")
        if not pid:
            continue
        known = merged.get(pid)
        if known is None or (not known.get("name") and participant.get("name")):
            merged[pid] = {"id": pid, "name": participant.get("name")}
    return [merged[pid] for pid in sorted(merged)]


class UnifiedStore:
    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory
        self._locks = KeyedLock()
        self._subscribers: list[ChangeCallback] = []
        self._subscribers_guard = threading.Lock()

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    def subscribe(self, callback: ChangeCallback) -> Callable[[], None]:
        """Register a change callback; returns a function that unsubscribes it."""
        with self._subscribers_guard:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._subscribers_guard:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def publish(self, event: ChangeEvent) -> None:
        with self._subscribers_guard:
            subscribers = list(self._subscribers)
        for callback in subscribers:
            try:
                callback(event)
            except Exception:
                logger.exception(f"Change subscriber failed for {event.entity} {event.action}")

    # ------------------------------------------------------------------
    # Inbound reconciliation
    # ------------------------------------------------------------------

    def upsert_message(self, connection_id: str, message: ExternalMessage) -> tuple[UpsertResult, Optional[Message]]:
        """
        Insert-or-ignore a platform message keyed on its external id.

        Locates or creates the conversation for (connection_id,
        external_thread_id) and appends the message unless the same
        external id is already stored there.
        """
        events: list[ChangeEvent] = []
        with self._locks.hold((connection_id, message.external_thread_id)):
            with self._session_factory() as db:
                connection = db.get(Connection, connection_id)
                if connection is None or connection.status != ConnectionStatus.ACTIVE.value:
                    logger.info(f"Discarding message for inactive connection {connection_id}")
                    return UpsertResult.DISCARDED, None

                conversation = self._find_conversation(db, connection_id, message.external_thread_id)
                if conversation is not None:
                    existing = self._find_message(db, conversation.conversation_id, message.external_message_id)
                    if existing is not None:
                        return UpsertResult.DUPLICATE, existing
                else:
                    conversation = Conversation(
                        conversation_id=new_id("conv"),
                        connection_id=connection_id,
                        external_thread_id=message.external_thread_id,
                        participants=[],
                        unread_count=0,
                        read_only=False,
                        created_at=utcnow(),
                    )
                    db.add(conversation)
                    events.append(ChangeEvent("conversation", "created", {
                        "connection_id": connection_id,
                        "conversation_id": conversation.conversation_id,
                    }))

                stored = Message(
                    message_id=new_id("msg"),
                    conversation_id=conversation.conversation_id,
                    external_message_id=message.external_message_id,
                    direction=(Direction.OUTBOUND if message.outbound else Direction.INBOUND).value,
                    sender_id=message.sender_id,
                    body=message.body,
                    sent_at=message.sent_at,
                    attachments=message.attachments or None,
                    delivery_state=(DeliveryState.SENT if message.outbound else DeliveryState.RECEIVED).value,
                    created_at=utcnow(),
                )
                db.add(stored)
                self._apply_message(conversation, stored, message.participants)

                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.info(f"Duplicate message detected on commit: {message.external_message_id}")
                    conversation = self._find_conversation(db, connection_id, message.external_thread_id)
                    existing = conversation and self._find_message(
                        db, conversation.conversation_id, message.external_message_id
                    )
                    return UpsertResult.DUPLICATE, existing

        if not events:
            events.append(ChangeEvent("conversation", "updated", {
                "connection_id": connection_id,
                "conversation_id": stored.conversation_id,
            }))
        events.append(ChangeEvent("message", "created", {
            "conversation_id": stored.conversation_id,
            "message_id": stored.message_id,
        }))
        for event in events:
            self.publish(event)
        return UpsertResult.CREATED, stored

    def merge_participants(self, connection_id: str, external_thread_id: str, participants: list[dict]) -> None:
        """Fold a polled participant list (with display names) into an existing conversation."""
        with self._locks.hold((connection_id, external_thread_id)):
            with self._session_factory() as db:
                conversation = self._find_conversation(db, connection_id, external_thread_id)
                if conversation is None:
                    return
                merged = merge_participants(conversation.participants, participants)
                if merged == conversation.participants:
                    return
                conversation.participants = merged
                db.commit()
                conversation_id = conversation.conversation_id
        self.publish(ChangeEvent("conversation", "updated", {
            "connection_id": connection_id,
            "conversation_id": conversation_id,
        }))

    # ------------------------------------------------------------------
    # Outbound messages
    # ------------------------------------------------------------------

    def create_provisional(self, conversation_id: str, body: str) -> Message:
        """Record a locally originated message as pending, before the platform sees it."""
        conversation, connection = self.get_send_context(conversation_id)
        with self._locks.hold((conversation.connection_id, conversation.external_thread_id)):
            with self._session_factory() as db:
                conversation = db.get(Conversation, conversation_id)
                message = Message(
                    message_id=new_id("msg"),
                    conversation_id=conversation_id,
                    provisional_id=new_id("prov"),
                    direction=Direction.OUTBOUND.value,
                    sender_id=connection.external_account_id,
                    body=body,
                    sent_at=utcnow(),
                    delivery_state=DeliveryState.PENDING.value,
                    created_at=utcnow(),
                )
                db.add(message)
                self._apply_message(conversation, message, [])
                db.commit()

        self.publish(ChangeEvent("message", "created", {
            "conversation_id": conversation_id,
            "message_id": message.message_id,
        }))
        return message

    def confirm_outbound(
        self,
        message_id: str,
        external_message_id: str,
        sent_at: Optional[datetime] = None,
    ) -> Optional[Message]:
        """
        Swap a provisional message to its platform id and mark it sent.

        If the platform echo was ingested first, the echoed row is kept and
        the provisional row is removed.
        """
        with self._session_factory() as db:
            pending = db.get(Message, message_id)
            if pending is None:
                return None
            conversation = db.get(Conversation, pending.conversation_id)
            lock_key = (conversation.connection_id, conversation.external_thread_id)

        events: list[ChangeEvent] = []
        with self._locks.hold(lock_key):
            with self._session_factory() as db:
                pending = db.get(Message, message_id)
                if pending is None:
                    return None
                echoed = self._find_message(db, pending.conversation_id, external_message_id)
                if echoed is not None and echoed.message_id != pending.message_id:
                    echoed.delivery_state = DeliveryState.SENT.value
                    db.delete(pending)
                    db.commit()
                    events.append(ChangeEvent("message", "deleted", {
                        "conversation_id": echoed.conversation_id,
                        "message_id": message_id,
                    }))
                    result = echoed
                else:
                    pending.external_message_id = external_message_id
                    pending.delivery_state = DeliveryState.SENT.value
                    pending.error = None
                    if sent_at is not None:
                        pending.sent_at = sent_at
                    db.commit()
                    result = pending

        events.append(ChangeEvent("message", "updated", {
            "conversation_id": result.conversation_id,
            "message_id": result.message_id,
        }))
        for event in events:
            self.publish(event)
        return result

    def fail_outbound(self, message_id: str, error: str) -> Optional[Message]:
        with self._session_factory() as db:
            message = db.get(Message, message_id)
            if message is None:
                return None
            message.delivery_state = DeliveryState.FAILED.value
            message.error = error[:500]
            db.commit()
        self.publish(ChangeEvent("message", "updated", {
            "conversation_id": message.conversation_id,
            "message_id": message.message_id,
        }))
        return message

    # ------------------------------------------------------------------
    # Conversation mutations
    # ------------------------------------------------------------------

    def mark_read(self, conversation_id: str) -> Conversation:
        with self._session_factory() as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFound(f"Conversation {conversation_id} not found")
            if conversation.unread_count == 0:
                return conversation
            conversation.unread_count = 0
            db.commit()
        self.publish(ChangeEvent("conversation", "updated", {
            "connection_id": conversation.connection_id,
            "conversation_id": conversation_id,
        }))
        return conversation

    def freeze_conversations(self, connection_id: str) -> int:
        """Mark every conversation of a connection read-only. History is kept."""
        with self._session_factory() as db:
            conversations = (
                db.query(Conversation)
                .filter(Conversation.connection_id == connection_id, Conversation.read_only.is_(False))
                .all()
            )
            for conversation in conversations:
                conversation.read_only = True
            db.commit()
            ids = [c.conversation_id for c in conversations]
        for conversation_id in ids:
            self.publish(ChangeEvent("conversation", "updated", {
                "connection_id": connection_id,
                "conversation_id": conversation_id,
            }))
        return len(ids)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_conversation(self, conversation_id: str) -> Conversation:
        with self._session_factory() as db:
            conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            raise NotFound(f"Conversation {conversation_id} not found")
        return conversation

    def get_send_context(self, conversation_id: str) -> tuple[Conversation, Connection]:
        """Conversation and owning connection, if the conversation accepts new messages."""
        with self._session_factory() as db:
            conversation = db.get(Conversation, conversation_id)
            if conversation is None:
                raise NotFound(f"Conversation {conversation_id} not found")
            connection = db.get(Connection, conversation.connection_id)
        if conversation.read_only or connection is None or connection.status != ConnectionStatus.ACTIVE.value:
            raise ConversationReadOnly(f"Conversation {conversation_id} is read-only")
        return conversation, connection

    def get_message(self, message_id: str) -> Optional[Message]:
        with self._session_factory() as db:
            return db.get(Message, message_id)

    def snapshot(self, message_window: int) -> StateSnapshot:
        """Connections, conversations newest first, and the last N messages of each."""
        with self._session_factory() as db:
            connections = credential_store.list_connections(db)
            conversations = (
                db.query(Conversation)
                .order_by(Conversation.last_message_at.is_(None), desc(Conversation.last_message_at))
                .all()
            )
            rank = (
                func.row_number()
                .over(
                    partition_by=Message.conversation_id,
                    order_by=[desc(Message.sent_at), desc(Message.created_at)],
                )
                .label("rank")
            )
            ranked = select(Message, rank).subquery()
            recent = aliased(Message, ranked)
            rows = db.query(recent).filter(ranked.c.rank <= message_window).all()

        by_conversation: dict[str, list[Message]] = {}
        for message in rows:
            by_conversation.setdefault(message.conversation_id, []).append(message)
        messages: list[Message] = []
        for conversation in conversations:
            window = by_conversation.get(conversation.conversation_id, [])
            window.sort(key=lambda m: (as_utc(m.sent_at), as_utc(m.created_at)))
            messages.extend(window)
        return StateSnapshot(connections=connections, conversations=conversations, messages=messages)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _find_conversation(db: Session, connection_id: str, external_thread_id: str) -> Optional[Conversation]:
        return (
            db.query(Conversation)
            .filter(
                Conversation.connection_id == connection_id,
                Conversation.external_thread_id == external_thread_id,
            )
            .first()
        )

    @staticmethod
    def _find_message(db: Session, conversation_id: str, external_message_id: str) -> Optional[Message]:
        return (
            db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.external_message_id == external_message_id,
            )
            .first()
        )

    @staticmethod
    def _apply_message(conversation: Conversation, message: Message, participants: list[dict]) -> None:
        """Fold a new message into the conversation summary. Order-independent."""
        sent_at = as_utc(message.sent_at)
        last = as_utc(conversation.last_message_at)
        if last is None or sent_at >= last:
            conversation.last_message_at = sent_at
            conversation.snippet = (message.body or "")[:200]
        if message.direction == Direction.INBOUND.value:
            conversation.unread_count = (conversation.unread_count or 0) + 1
        if participants:
            conversation.participants = merge_participants(conversation.participants, participants)
