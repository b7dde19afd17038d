"""
Tests for conversation reconciliation.

Tests cover:
- Webhook ingestion: idempotence, ordering, malformed and orphaned events
- Cursor-based polling, resume after interruption, overlap and cancellation
- Outbound sends with pending -> sent/failed reconciliation
- Mark-read and change notification
- The per-conversation message window of the state snapshot
"""

import asyncio
from datetime import datetime, timezone

import pytest

from social_sync.errors import (
    ConversationReadOnly,
    CredentialExpired,
    MalformedEvent,
    NotFound,
    RateLimited,
    SendFailed,
)
from social_sync.models import ConnectionStatus
from tests.fakes import (
    conversation,
    connect,
    demo_event,
    demo_message,
    external_message,
    page,
)


def conversations_by_thread(services) -> dict:
    return {c.external_thread_id: c for c in services.state_api.get_state().conversations}


def messages_of(services, conversation_id: str) -> list:
    return [m for m in services.state_api.get_state().messages if m.conversation_id == conversation_id]


async def wait_for(predicate, attempts: int = 100) -> None:
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


class TestWebhookIngestion:
    """Test the push delivery path."""

    @pytest.mark.asyncio
    async def test_event_creates_conversation_and_message(self, services):
        connection = await connect(services)

        result = await services.engine.ingest_webhook_event(
            connection.connection_id, demo_event(demo_message("m1", text="Hello there", name="Ana"))
        )

        assert result.created == 1
        conv = conversations_by_thread(services)["user-1"]
        assert conv.snippet == "Hello there"
        assert conv.unread_count == 1
        assert [p.id for p in conv.participants] == ["user-1"]
        assert conv.participants[0].name == "Ana"
        [message] = messages_of(services, conv.conversation_id)
        assert message.direction == "inbound"
        assert message.delivery_state == "received"

    @pytest.mark.asyncio
    async def test_attachments_are_stored(self, services):
        connection = await connect(services)
        photo = {"type": "image", "url": "https://cdn.example/p.jpg"}

        await services.engine.ingest_webhook_event(
            connection.connection_id, demo_event(demo_message("m1", text="[Media]", attachments=[photo]))
        )

        [message] = services.state_api.get_state().messages
        assert message.attachments == [photo]

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_ignored(self, services):
        connection = await connect(services)
        event = demo_event(demo_message("m1"))

        first = await services.engine.ingest_webhook_event(connection.connection_id, event)
        second = await services.engine.ingest_webhook_event(connection.connection_id, event)

        assert (first.created, first.duplicates) == (1, 0)
        assert (second.created, second.duplicates) == (0, 1)
        conv = conversations_by_thread(services)["user-1"]
        assert conv.unread_count == 1
        assert len(messages_of(services, conv.conversation_id)) == 1

    @pytest.mark.asyncio
    async def test_out_of_order_delivery_converges(self, services):
        connection = await connect(services)
        early = "2025-01-15T10:01:00+00:00"
        late = "2025-01-15T10:02:00+00:00"

        for mid, ts, text in [("a1", early, "first"), ("a2", late, "second")]:
            await services.engine.ingest_webhook_event(
                connection.connection_id, demo_event(demo_message(mid, thread="user-a", text=text, ts=ts))
            )
        for mid, ts, text in [("b2", late, "second"), ("b1", early, "first")]:
            await services.engine.ingest_webhook_event(
                connection.connection_id, demo_event(demo_message(mid, thread="user-b", text=text, ts=ts))
            )

        convs = conversations_by_thread(services)
        in_order, reversed_order = convs["user-a"], convs["user-b"]
        assert in_order.snippet == reversed_order.snippet == "second"
        assert in_order.last_message_at == reversed_order.last_message_at
        assert in_order.unread_count == reversed_order.unread_count == 2
        assert [m.body for m in messages_of(services, reversed_order.conversation_id)] == ["first", "second"]

    @pytest.mark.asyncio
    async def test_malformed_event_raises(self, services):
        connection = await connect(services)

        with pytest.raises(MalformedEvent):
            await services.engine.ingest_webhook_event(connection.connection_id, {"unexpected": True})

        assert services.state_api.get_state().conversations == []

    @pytest.mark.asyncio
    async def test_unknown_connection_raises(self, services):
        with pytest.raises(NotFound):
            await services.engine.ingest_webhook_event("conn_missing", demo_event(demo_message("m1")))

    @pytest.mark.asyncio
    async def test_event_for_revoked_connection_is_discarded(self, services):
        connection = await connect(services)
        await services.connections.disconnect(connection.connection_id)

        result = await services.engine.ingest_webhook_event(
            connection.connection_id, demo_event(demo_message("m1"))
        )

        assert result.created == 0
        assert result.discarded == 1
        assert services.state_api.get_state().messages == []

    @pytest.mark.asyncio
    async def test_payload_is_routed_per_account(self, services):
        await connect(services)
        payload = {
            "entries": [
                demo_event(demo_message("m1")),
                demo_event(demo_message("m2"), account_id="someone-else"),
                {"account_id": "acct-1", "messages": "not-a-list"},
            ]
        }

        result = await services.engine.ingest_webhook_payload("demo", payload)

        assert result.created == 1
        assert result.discarded == 1
        assert result.failed == 1

    @pytest.mark.asyncio
    async def test_change_events_published(self, services):
        connection = await connect(services)
        events = []
        unsubscribe = services.state_api.subscribe(events.append)

        await services.engine.ingest_webhook_event(connection.connection_id, demo_event(demo_message("m1")))
        unsubscribe()
        await services.engine.ingest_webhook_event(connection.connection_id, demo_event(demo_message("m2")))

        assert [(e.entity, e.action) for e in events] == [
            ("conversation", "created"),
            ("message", "created"),
        ]

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_break_ingestion(self, services):
        connection = await connect(services)

        def broken(event):
            raise RuntimeError("subscriber crashed")

        services.state_api.subscribe(broken)
        result = await services.engine.ingest_webhook_event(
            connection.connection_id, demo_event(demo_message("m1"))
        )

        assert result.created == 1


class TestPolling:
    """Test the cursor-based pull path."""

    @pytest.mark.asyncio
    async def test_poll_walks_pages_and_stores_sync_cursor(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.pages = {
            None: page(conversation("user-1", external_message("m1", minute=1), name="Ana"), next_cursor="p2"),
            "p2": page(conversation("user-2", external_message("m2", thread="user-2", minute=2)), sync_cursor="s1"),
        }

        result = await services.engine.poll_conversations(connection.connection_id)

        assert (result.pages, result.created, result.failed) == (2, 2, 0)
        assert fake_platform.fetch_calls == [None, "p2"]
        stored = services.connections.get_connection(connection.connection_id)
        assert stored.poll_cursor == "s1"
        assert stored.last_synced_at is not None
        convs = conversations_by_thread(services)
        participants = {p.id: p.name for p in convs["user-1"].participants}
        assert participants == {"acct-1": "Demo Clinic", "user-1": "Ana"}

    @pytest.mark.asyncio
    async def test_next_poll_resumes_from_stored_cursor(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.pages = {None: page(sync_cursor="s1")}
        await services.engine.poll_conversations(connection.connection_id)

        await services.engine.poll_conversations(connection.connection_id)

        assert fake_platform.fetch_calls == [None, "s1"]

    @pytest.mark.asyncio
    async def test_interrupted_poll_resumes_without_loss_or_duplication(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.pages = {
            None: page(conversation("user-1", external_message("m1", minute=1)), next_cursor="p2"),
            "p2": page(
                conversation(
                    "user-2",
                    external_message("m2", thread="user-2", minute=2),
                    external_message("m3", thread="user-2", minute=3),
                ),
                sync_cursor="s1",
            ),
        }
        fake_platform.fetch_errors = {"p2": RateLimited("slow down", retry_after=30)}

        with pytest.raises(RateLimited):
            await services.engine.poll_conversations(connection.connection_id)
        assert services.connections.get_connection(connection.connection_id).poll_cursor == "p2"

        # the same message also arrives by webhook before the retry
        services.store.upsert_message(connection.connection_id, external_message("m2", thread="user-2", minute=2))

        result = await services.engine.poll_conversations(connection.connection_id)

        assert (result.created, result.duplicates) == (1, 1)
        assert services.connections.get_connection(connection.connection_id).poll_cursor == "s1"
        user_2 = conversations_by_thread(services)["user-2"]
        assert len(messages_of(services, user_2.conversation_id)) == 2
        assert user_2.unread_count == 2

    @pytest.mark.asyncio
    async def test_rate_limited_poll_keeps_cursor(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.fetch_errors = {None: RateLimited("throttled")}

        with pytest.raises(RateLimited):
            await services.engine.poll_conversations(connection.connection_id)

        stored = services.connections.get_connection(connection.connection_id)
        assert stored.poll_cursor is None
        assert stored.status == ConnectionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_rejected_token_expires_connection(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.fetch_errors = {None: CredentialExpired("token invalidated")}

        with pytest.raises(CredentialExpired):
            await services.engine.poll_conversations(connection.connection_id)

        stored = services.connections.get_connection(connection.connection_id)
        assert stored.status == ConnectionStatus.EXPIRED.value
        with pytest.raises(CredentialExpired):
            await services.engine.poll_conversations(connection.connection_id)

    @pytest.mark.asyncio
    async def test_overlapping_poll_is_skipped(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.fetch_gate = asyncio.Event()

        running = asyncio.ensure_future(services.engine.poll_conversations(connection.connection_id))
        await wait_for(lambda: fake_platform.fetch_calls)
        overlapping = await services.engine.poll_conversations(connection.connection_id)
        fake_platform.fetch_gate.set()
        completed = await running

        assert overlapping.skipped is True
        assert completed.skipped is False
        assert fake_platform.fetch_calls == [None]

    @pytest.mark.asyncio
    async def test_disconnect_during_poll_discards_results(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.pages = {None: page(conversation("user-1", external_message("m1")), sync_cursor="s1")}
        fake_platform.fetch_gate = asyncio.Event()

        running = asyncio.ensure_future(services.engine.poll_conversations(connection.connection_id))
        await wait_for(lambda: fake_platform.fetch_calls)
        await services.connections.disconnect(connection.connection_id)
        fake_platform.fetch_gate.set()
        result = await running

        assert result.cancelled is True
        assert result.created == 0
        assert services.state_api.get_state().messages == []
        assert services.connections.get_connection(connection.connection_id).poll_cursor is None

    @pytest.mark.asyncio
    async def test_failed_upsert_keeps_cursor_until_page_applies(self, services, fake_platform, monkeypatch):
        connection = await connect(services)
        fake_platform.pages = {
            None: page(
                conversation("user-1", external_message("m1", minute=1), external_message("m2", minute=2)),
                sync_cursor="s1",
            ),
        }
        upsert = services.store.upsert_message
        failures = ["m2"]

        def flaky_upsert(connection_id, message):
            if message.external_message_id in failures:
                failures.remove(message.external_message_id)
                raise RuntimeError("database is locked")
            return upsert(connection_id, message)

        monkeypatch.setattr(services.store, "upsert_message", flaky_upsert)

        first = await services.engine.poll_conversations(connection.connection_id)

        assert (first.created, first.failed, first.pages) == (1, 1, 0)
        assert services.connections.get_connection(connection.connection_id).poll_cursor is None

        second = await services.engine.poll_conversations(connection.connection_id)

        assert (second.created, second.duplicates, second.failed) == (1, 1, 0)
        assert services.connections.get_connection(connection.connection_id).poll_cursor == "s1"
        user_1 = conversations_by_thread(services)["user-1"]
        assert [m.external_message_id for m in messages_of(services, user_1.conversation_id)] == ["m1", "m2"]

    @pytest.mark.asyncio
    async def test_poll_lock_released_after_poll(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.pages = {None: page(sync_cursor="s1")}
        fake_platform.fetch_errors = {"s1": RateLimited("throttled")}

        await services.engine.poll_conversations(connection.connection_id)
        with pytest.raises(RateLimited):
            await services.engine.poll_conversations(connection.connection_id)

        assert services.engine._poll_locks == {}

    @pytest.mark.asyncio
    async def test_poll_since_ignores_stored_cursor(self, services, fake_platform):
        connection = await connect(services)
        fake_platform.pages = {None: page(sync_cursor="s1")}
        await services.engine.poll_conversations(connection.connection_id)

        await services.engine.poll_conversations(
            connection.connection_id, since=datetime(2025, 1, 1, tzinfo=timezone.utc)
        )

        assert fake_platform.fetch_calls == [None, None]


class TestOutbound:
    """Test sending messages from the inbox."""

    async def _conversation_id(self, services) -> str:
        connection = await connect(services)
        await services.engine.ingest_webhook_event(connection.connection_id, demo_event(demo_message("m1")))
        return conversations_by_thread(services)["user-1"].conversation_id

    @pytest.mark.asyncio
    async def test_send_is_pending_then_sent(self, services, fake_platform):
        conversation_id = await self._conversation_id(services)

        provisional = await services.engine.send_message(conversation_id, "We open at 9")

        assert provisional.delivery_state == "pending"
        assert provisional.provisional_id is not None
        assert provisional.external_message_id is None

        await services.engine.drain()

        assert fake_platform.sent == [("user-1", "We open at 9")]
        sent = services.store.get_message(provisional.message_id)
        assert sent.delivery_state == "sent"
        assert sent.external_message_id == "sent-1"
        assert conversations_by_thread(services)["user-1"].snippet == "We open at 9"

    @pytest.mark.asyncio
    async def test_failed_send_stays_visible(self, services, fake_platform):
        conversation_id = await self._conversation_id(services)
        fake_platform.send_error = SendFailed("recipient unavailable")

        provisional = await services.engine.send_message(conversation_id, "Hello?")
        await services.engine.drain()

        failed = [m for m in messages_of(services, conversation_id) if m.message_id == provisional.message_id]
        assert len(failed) == 1
        assert failed[0].delivery_state == "failed"
        assert "recipient unavailable" in failed[0].error

    @pytest.mark.asyncio
    async def test_echo_before_confirmation_is_merged(self, services, fake_platform):
        conversation_id = await self._conversation_id(services)
        fake_platform.send_gate = asyncio.Event()
        fake_platform.next_message_ids = ["echo-1"]

        provisional = await services.engine.send_message(conversation_id, "On my way")
        connection = services.connections.list_connections()[0]
        await services.engine.ingest_webhook_event(
            connection.connection_id,
            demo_event(demo_message("echo-1", text="On my way", ts="2025-01-15T10:05:00+00:00", **{"from": "acct-1"})),
        )
        fake_platform.send_gate.set()
        await services.engine.drain()

        outbound = [m for m in messages_of(services, conversation_id) if m.direction == "outbound"]
        assert len(outbound) == 1
        assert outbound[0].external_message_id == "echo-1"
        assert outbound[0].delivery_state == "sent"
        assert services.store.get_message(provisional.message_id) is None

    @pytest.mark.asyncio
    async def test_empty_body_rejected(self, services):
        conversation_id = await self._conversation_id(services)

        with pytest.raises(SendFailed):
            await services.engine.send_message(conversation_id, "   ")

    @pytest.mark.asyncio
    async def test_unknown_conversation(self, services):
        with pytest.raises(NotFound):
            await services.engine.send_message("conv_missing", "Hello")

    @pytest.mark.asyncio
    async def test_expired_connection_is_read_only(self, services):
        conversation_id = await self._conversation_id(services)
        connection = services.connections.list_connections()[0]
        services.connections.mark_expired(connection.connection_id)

        with pytest.raises(ConversationReadOnly):
            await services.engine.send_message(conversation_id, "Hello")
        assert conversations_by_thread(services)["user-1"].read_only is True


class TestMarkRead:
    """Test clearing unread counts."""

    @pytest.mark.asyncio
    async def test_mark_read_zeroes_unread_and_notifies_platform(self, services, fake_platform):
        connection = await connect(services)
        await services.engine.ingest_webhook_event(
            connection.connection_id, demo_event(demo_message("m1"), demo_message("m2"))
        )
        conversation_id = conversations_by_thread(services)["user-1"].conversation_id

        conv = await services.engine.mark_read(conversation_id)
        await services.engine.drain()

        assert conv.unread_count == 0
        assert conversations_by_thread(services)["user-1"].unread_count == 0
        assert fake_platform.marked_read == ["user-1"]

    @pytest.mark.asyncio
    async def test_mark_read_unknown_conversation(self, services):
        with pytest.raises(NotFound):
            await services.engine.mark_read("conv_missing")


class TestSnapshot:
    """Test the state snapshot window."""

    @pytest.mark.asyncio
    async def test_window_keeps_latest_messages_per_conversation(self, services):
        connection = await connect(services)
        for thread, minutes in (("user-1", (3, 1, 4, 2)), ("user-2", (5,))):
            for minute in minutes:
                services.store.upsert_message(
                    connection.connection_id, external_message(f"{thread}-{minute}", thread=thread, minute=minute)
                )

        state = services.state_api.get_state(message_window=2)

        convs = conversations_by_thread(services)
        assert [c.external_thread_id for c in state.conversations] == ["user-2", "user-1"]
        assert [m.external_message_id for m in state.messages] == ["user-2-5", "user-1-3", "user-1-4"]
        assert all(m.conversation_id == convs["user-1"].conversation_id for m in state.messages[1:])
