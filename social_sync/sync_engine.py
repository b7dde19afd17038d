"""
Reconciles platform conversations into the unified store.

Two delivery paths feed the same idempotent sink: webhook pushes and
cursor-based polls. Both upsert messages by their external id, so
duplicates and reordering between the paths are harmless: whichever upsert
commits first wins and the other is a no-op. Outbound sends are recorded
as pending first and reconciled by a background task.
"""

import asyncio
import logging
from dataclasses import dataclass, fields
from datetime import datetime
from typing import Any, Optional

from social_sync.alerts import AlertChannel
from social_sync.connection_manager import ConnectionManager
from social_sync.errors import (
    ConversationReadOnly,
    CredentialExpired,
    MalformedEvent,
    NotFound,
    RateLimited,
    SendFailed,
)
from social_sync.metrics import record_outbound_message, record_poll_run, record_sync_message
from social_sync.models import ConnectionStatus, Conversation, Message
from social_sync.platforms.base import ExternalMessage
from social_sync.unified_store import UnifiedStore, UpsertResult

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    created: int = 0
    duplicates: int = 0
    discarded: int = 0
    failed: int = 0

    def add(self, other: "IngestResult") -> None:
        for f in fields(IngestResult):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))


@dataclass
class PollResult(IngestResult):
    connection_id: str = ""
    pages: int = 0
    skipped: bool = False
    cancelled: bool = False


class SyncEngine:
    def __init__(
        self,
        connections: ConnectionManager,
        store: UnifiedStore,
        alerts: Optional[AlertChannel] = None,
    ):
        self._connections = connections
        self._store = store
        self._alerts = alerts or AlertChannel()
        self._poll_locks: dict[str, asyncio.Lock] = {}
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Webhook path
    # ------------------------------------------------------------------

    async def ingest_webhook_event(self, connection_id: str, raw_event: Any) -> IngestResult:
        """
        Parse one platform event for a connection and upsert its messages.

        Raises MalformedEvent for payloads that can never be applied and
        NotFound for unknown connections.
        """
        connection = self._connections.get_connection(connection_id)
        adapter = self._connections.adapter(connection.platform)
        messages = adapter.parse_event(connection.external_account_id, raw_event)

        result = IngestResult()
        if connection.status != ConnectionStatus.ACTIVE.value:
            logger.info(f"Dropping {len(messages)} webhook message(s) for {connection.status} connection {connection_id}")
            result.discarded = len(messages)
            return result

        for message in messages:
            self._apply(connection_id, message, "webhook", result)
        return result

    async def ingest_webhook_payload(self, platform: str, payload: Any) -> IngestResult:
        """
        Route a raw webhook delivery to the owning connections.

        A delivery may batch entries for several accounts; each entry is
        ingested independently so one bad entry does not abort the rest.
        """
        adapter = self._connections.adapter(platform)
        entries = adapter.split_webhook(payload)

        total = IngestResult()
        for external_account_id, raw_event in entries:
            connection = self._connections.find_active_connection(platform, external_account_id)
            if connection is None:
                logger.info(f"No active {platform} connection for account {external_account_id}; entry dropped")
                total.discarded += 1
                continue
            try:
                total.add(await self.ingest_webhook_event(connection.connection_id, raw_event))
            except MalformedEvent as e:
                logger.warning(f"Malformed {platform} event for {connection.connection_id} dropped: {e}")
                total.failed += 1
            except Exception:
                logger.exception(f"Failed to ingest {platform} event for {connection.connection_id}")
                total.failed += 1
        return total

    # ------------------------------------------------------------------
    # Poll path
    # ------------------------------------------------------------------

    async def poll_conversations(self, connection_id: str, since: Optional[datetime] = None) -> PollResult:
        """
        Pull conversations changed since the stored cursor (or ``since``).

        Polls for one connection never overlap: a request arriving while a
        poll is running is skipped. The cursor is persisted only after a
        page has been fully applied, so an interrupted poll, or one that failed
        to store any message of a page, re-fetches that page next time.
        """
        lock = self._poll_locks.setdefault(connection_id, asyncio.Lock())
        if lock.locked():
            logger.info(f"Poll already running for connection {connection_id}; skipped")
            record_poll_run("skipped")
            return PollResult(connection_id=connection_id, skipped=True)
        async with lock:
            try:
                return await self._poll(connection_id, since)
            finally:
                # overlapping callers return without waiting on the lock
                self._poll_locks.pop(connection_id, None)

    async def _poll(self, connection_id: str, since: Optional[datetime]) -> PollResult:
        connection = self._connections.get_connection(connection_id)
        if connection.status != ConnectionStatus.ACTIVE.value:
            record_poll_run("credential_expired")
            raise CredentialExpired(f"Connection {connection_id} is {connection.status}; reconnect required")

        adapter = self._connections.adapter(connection.platform)
        generation = self._connections.generation(connection_id)
        cursor = None if since is not None else connection.poll_cursor
        result = PollResult(connection_id=connection_id)

        while True:
            try:
                token = await self._connections.get_valid_token(connection_id)
                page = await adapter.fetch_conversations(
                    token, connection.external_account_id, cursor=cursor, since=since
                )
            except CredentialExpired:
                self._connections.mark_expired(connection_id)
                record_poll_run("credential_expired")
                raise
            except RateLimited:
                record_poll_run("rate_limited")
                raise

            if self._connections.generation(connection_id) != generation:
                return self._cancelled(result)

            failed_before = result.failed
            for conversation in page.conversations:
                for message in conversation.messages:
                    self._apply(connection_id, message, "poll", result)
                try:
                    self._store.merge_participants(
                        connection_id, conversation.external_thread_id, conversation.participants
                    )
                except Exception:
                    logger.exception(f"Failed to merge participants for thread {conversation.external_thread_id}")
                    result.failed += 1

            if result.failed > failed_before:
                # cursor stays put so the next poll re-fetches this page
                self._alerts.send(
                    "Poll stopped on a partially applied page",
                    {"connection_id": connection_id, "failed": result.failed, "pages": result.pages},
                )
                record_poll_run("failed")
                return result

            finished = page.next_cursor is None
            next_cursor = page.sync_cursor if finished else page.next_cursor
            if not self._connections.save_poll_cursor(connection_id, next_cursor, generation, finished):
                return self._cancelled(result)
            result.pages += 1
            if finished:
                break
            cursor = next_cursor

        record_poll_run("completed")
        logger.info(
            f"Poll completed for {connection_id}: pages={result.pages} created={result.created} "
            f"duplicates={result.duplicates} failed={result.failed}"
        )
        return result

    @staticmethod
    def _cancelled(result: PollResult) -> PollResult:
        logger.info(f"Connection {result.connection_id} disconnected during poll; results discarded")
        record_poll_run("cancelled")
        result.cancelled = True
        return result

    def _apply(self, connection_id: str, message: ExternalMessage, source: str, result: IngestResult) -> None:
        try:
            outcome, _ = self._store.upsert_message(connection_id, message)
        except Exception:
            logger.exception(f"Failed to upsert message {message.external_message_id}")
            record_sync_message(source, "error")
            result.failed += 1
            return

        record_sync_message(source, outcome.value)
        if outcome is UpsertResult.CREATED:
            result.created += 1
        elif outcome is UpsertResult.DUPLICATE:
            result.duplicates += 1
        else:
            result.discarded += 1

    # ------------------------------------------------------------------
    # Outbound path
    # ------------------------------------------------------------------

    async def send_message(self, conversation_id: str, body: str) -> Message:
        """
        Record a pending outbound message and deliver it in the background.

        Returns the provisional message right away; subscribers of the store
        see it flip to sent or failed once the platform answers.
        """
        if not body or not body.strip():
            raise SendFailed("Message body is empty")
        message = self._store.create_provisional(conversation_id, body)
        self._spawn(self._deliver(message.message_id, conversation_id, body))
        return message

    async def _deliver(self, message_id: str, conversation_id: str, body: str) -> None:
        try:
            conversation, connection = self._store.get_send_context(conversation_id)
        except (NotFound, ConversationReadOnly) as e:
            self._fail(message_id, str(e))
            return

        try:
            token = await self._connections.get_valid_token(connection.connection_id)
            adapter = self._connections.adapter(connection.platform)
            sent = await adapter.send_message(
                token, connection.external_account_id, conversation.external_thread_id, body
            )
        except CredentialExpired as e:
            self._connections.mark_expired(connection.connection_id)
            self._fail(message_id, str(e))
        except (SendFailed, RateLimited) as e:
            self._fail(message_id, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error sending message {message_id}")
            self._fail(message_id, str(e) or e.__class__.__name__)
        else:
            self._store.confirm_outbound(message_id, sent.external_message_id, sent.sent_at)
            record_outbound_message("sent")
            logger.info(f"Message {message_id} sent as {sent.external_message_id}")

    def _fail(self, message_id: str, reason: str) -> None:
        logger.warning(f"Message {message_id} failed to send: {reason}")
        record_outbound_message("failed")
        self._store.fail_outbound(message_id, reason)

    # ------------------------------------------------------------------
    # Read state
    # ------------------------------------------------------------------

    async def mark_read(self, conversation_id: str) -> Conversation:
        """Zero the local unread count, then tell the platform best-effort."""
        conversation = self._store.mark_read(conversation_id)
        if not conversation.read_only:
            self._spawn(self._remote_mark_read(conversation))
        return conversation

    async def _remote_mark_read(self, conversation: Conversation) -> None:
        try:
            _, connection = self._store.get_send_context(conversation.conversation_id)
            token = await self._connections.get_valid_token(connection.connection_id)
            adapter = self._connections.adapter(connection.platform)
            await adapter.mark_read(token, connection.external_account_id, conversation.external_thread_id)
        except Exception as e:
            logger.warning(f"Remote mark-read failed for {conversation.conversation_id}: {e}")

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def drain(self) -> None:
        """Wait for in-flight sends and read receipts to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
