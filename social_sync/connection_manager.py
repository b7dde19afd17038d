"""
OAuth connection lifecycle.

Drives the authorization handshake, hands out valid access tokens
(refreshing them when needed) and disconnects. One instance is built per
process and passed to whoever needs it; it holds the in-flight refresh
tasks and per-connection generations used to discard stale results after
a disconnect.
"""

import asyncio
import logging
import secrets
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, Optional

import httpx
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from social_sync import credential_store
from social_sync.config import Settings, get_settings
from social_sync.errors import (
    CredentialExpired,
    InvalidState,
    NotFound,
    RateLimited,
    SocialSyncError,
    TokenExchangeFailed,
    UnsupportedPlatform,
)
from social_sync.metrics import record_token_refresh
from social_sync.models import Connection, ConnectionStatus
from social_sync.platforms.base import PlatformAdapter
from social_sync.unified_store import ChangeEvent, UnifiedStore
from social_sync.utils import as_utc, hash_state, utcnow

logger = logging.getLogger(__name__)


@dataclass
class AuthorizationStart:
    authorization_url: str
    state: str
    connection_id: str


class ConnectionManager:
    def __init__(
        self,
        session_factory: sessionmaker,
        platforms: dict[str, PlatformAdapter],
        store: UnifiedStore,
        settings: Optional[Settings] = None,
        clock: Callable = utcnow,
    ):
        self._session_factory = session_factory
        self._platforms = platforms
        self._store = store
        self._settings = settings or get_settings()
        self._clock = clock
        self._refreshes: dict[str, asyncio.Task] = {}
        self._generations: dict[str, int] = {}

    @property
    def platforms(self) -> list[str]:
        return sorted(self._platforms)

    def adapter(self, platform: str) -> PlatformAdapter:
        adapter = self._platforms.get(platform)
        if adapter is None:
            raise UnsupportedPlatform(f"Platform '{platform}' is not configured")
        return adapter

    def generation(self, connection_id: str) -> int:
        """Bumped on disconnect; work started under an older generation is stale."""
        return self._generations.get(connection_id, 0)

    # ------------------------------------------------------------------
    # Authorization handshake
    # ------------------------------------------------------------------

    def begin_authorization(self, platform: str) -> AuthorizationStart:
        adapter = self.adapter(platform)
        state = secrets.token_urlsafe(32)
        expires_at = self._clock() + timedelta(seconds=self._settings.OAUTH_STATE_TTL_SECONDS)

        with self._session_factory() as db:
            pending = credential_store.create_pending(db, platform, hash_state(state), expires_at)
            db.commit()

        logger.info(f"Authorization started for {platform}, connection {pending.connection_id}")
        return AuthorizationStart(
            authorization_url=adapter.authorization_url(state),
            state=state,
            connection_id=pending.connection_id,
        )

    async def complete_authorization(self, code: str, state: str) -> list[Connection]:
        """
        Finish the handshake for the attempt identified by ``state``.

        Exchanges the code, fetches the granted accounts and upserts one
        active Connection per account in a single transaction. An account
        that already has an active Connection gets its token replaced in
        place.
        """
        if not code or not state:
            raise InvalidState("Missing authorization code or state")

        with self._session_factory() as db:
            pending = credential_store.find_pending_by_state(db, hash_state(state))
            if pending is None:
                raise InvalidState("Unknown or already used authorization state")
            expired = as_utc(pending.oauth_state_expires_at) <= self._clock()
            credential_store.consume_state(pending)
            db.commit()
            pending_id, platform = pending.connection_id, pending.platform
        if expired:
            raise InvalidState("Authorization state expired")

        adapter = self.adapter(platform)
        try:
            grant = await adapter.exchange_code(code)
            accounts = await adapter.fetch_accounts(grant)
        except TokenExchangeFailed:
            raise
        except (SocialSyncError, httpx.HTTPError) as e:
            raise TokenExchangeFailed(f"Token exchange failed: {e}") from e

        events: list[ChangeEvent] = []
        with self._session_factory() as db:
            try:
                pending = credential_store.get_connection(db, pending_id)
                promoted = False
                connections = []
                for account in accounts:
                    existing = credential_store.find_active(db, platform, account.external_account_id)
                    if existing is not None:
                        credential_store.apply_grant(existing, account.grant)
                        existing.display_name = account.display_name or existing.display_name
                        connection = existing
                        action = "updated"
                    elif not promoted and pending is not None:
                        credential_store.activate(pending, account.external_account_id, account.display_name, account.grant)
                        connection = pending
                        promoted = True
                        action = "created"
                    else:
                        connection = credential_store.create_active(
                            db, platform, account.external_account_id, account.display_name, account.grant
                        )
                        action = "created"
                    connections.append(connection)
                    events.append(ChangeEvent("connection", action, {"connection_id": connection.connection_id}))
                if not promoted and pending is not None:
                    # every account already had an active connection
                    db.delete(pending)
                db.commit()
            except IntegrityError as e:
                db.rollback()
                raise TokenExchangeFailed("Concurrent authorization for the same account") from e

        for event in events:
            self._store.publish(event)
        logger.info(f"Authorization completed for {platform}: {len(connections)} connection(s)")

        # polling still covers accounts whose subscription failed
        for connection in connections:
            try:
                await adapter.subscribe_webhooks(connection.access_token, connection.external_account_id)
            except Exception as e:
                logger.warning(f"Webhook subscription failed for connection {connection.connection_id}: {e}")
        return connections

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    async def get_valid_token(self, connection_id: str) -> str:
        """
        Return a usable access token for an active connection.

        Concurrent callers share a single in-flight refresh. A failed
        refresh expires the connection and raises CredentialExpired.
        """
        connection = self.get_connection(connection_id)
        if connection.status != ConnectionStatus.ACTIVE.value:
            raise CredentialExpired(f"Connection {connection_id} is {connection.status}; reconnect required")

        if not self._needs_refresh(connection):
            return connection.access_token

        task = self._refreshes.get(connection_id)
        if task is None:
            adapter = self.adapter(connection.platform)
            if not adapter.supports_refresh:
                self.mark_expired(connection_id, "token expired and platform cannot refresh")
                raise CredentialExpired(f"Connection {connection_id} token expired; reconnect required")
            task = asyncio.ensure_future(self._refresh(connection, adapter, self.generation(connection_id)))
            self._refreshes[connection_id] = task
            task.add_done_callback(lambda t: self._refresh_done(connection_id, t))
        return await asyncio.shield(task)

    def _needs_refresh(self, connection: Connection) -> bool:
        expires_at = as_utc(connection.token_expires_at)
        if expires_at is None:
            return False
        margin = timedelta(seconds=self._settings.TOKEN_REFRESH_MARGIN_SECONDS)
        return expires_at - margin <= self._clock()

    async def _refresh(self, connection: Connection, adapter: PlatformAdapter, generation: int) -> str:
        connection_id = connection.connection_id
        logger.info(f"Refreshing token for connection {connection_id}")
        try:
            grant = await adapter.refresh_token(connection.access_token, connection.refresh_token)
        except RateLimited:
            record_token_refresh("rate_limited")
            raise
        except Exception as e:
            record_token_refresh("failed")
            logger.warning(f"Token refresh failed for connection {connection_id}: {e}")
            if self.generation(connection_id) == generation:
                self.mark_expired(connection_id, "token refresh failed")
            raise CredentialExpired(f"Connection {connection_id} token refresh failed; reconnect required") from e

        with self._session_factory() as db:
            current = credential_store.get_connection(db, connection_id)
            if (
                current is None
                or current.status != ConnectionStatus.ACTIVE.value
                or self.generation(connection_id) != generation
            ):
                record_token_refresh("discarded")
                raise CredentialExpired(f"Connection {connection_id} was disconnected during refresh")
            credential_store.apply_grant(current, grant)
            db.commit()

        record_token_refresh("refreshed")
        logger.info(f"Token refreshed for connection {connection_id}")
        return grant.access_token

    def _refresh_done(self, connection_id: str, task: asyncio.Task) -> None:
        if self._refreshes.get(connection_id) is task:
            del self._refreshes[connection_id]
        if not task.cancelled():
            # retrieved here so an unawaited failure is not reported as lost
            task.exception()

    def mark_expired(self, connection_id: str, reason: str = "platform rejected token") -> None:
        """Move an active connection to expired; it stops syncing until re-authorized."""
        with self._session_factory() as db:
            connection = credential_store.get_connection(db, connection_id)
            if connection is None or connection.status != ConnectionStatus.ACTIVE.value:
                return
            credential_store.set_status(connection, ConnectionStatus.EXPIRED)
            db.commit()
        logger.warning(f"Connection {connection_id} expired: {reason}")
        self._store.freeze_conversations(connection_id)
        self._store.publish(ChangeEvent("connection", "updated", {"connection_id": connection_id}))

    # ------------------------------------------------------------------
    # Disconnect and reads
    # ------------------------------------------------------------------

    async def disconnect(self, connection_id: str) -> Connection:
        """
        Revoke locally, then best-effort revoke on the platform.

        Local revocation always succeeds; in-flight poll and refresh results
        for this connection are discarded from here on.
        """
        with self._session_factory() as db:
            connection = credential_store.get_connection(db, connection_id)
            if connection is None:
                raise NotFound(f"Connection {connection_id} not found")
            if connection.status == ConnectionStatus.REVOKED.value:
                return connection
            token = connection.access_token
            credential_store.set_status(connection, ConnectionStatus.REVOKED)
            connection.access_token = None
            connection.refresh_token = None
            db.commit()

        self._generations[connection_id] = self.generation(connection_id) + 1
        self._store.freeze_conversations(connection_id)
        self._store.publish(ChangeEvent("connection", "updated", {"connection_id": connection_id}))
        logger.info(f"Connection {connection_id} revoked")

        adapter = self._platforms.get(connection.platform)
        if adapter is not None and token and connection.external_account_id:
            try:
                await adapter.revoke_token(token, connection.external_account_id)
            except Exception as e:
                logger.warning(f"Remote revoke failed for connection {connection_id}: {e}")
        return connection

    def get_connection(self, connection_id: str) -> Connection:
        with self._session_factory() as db:
            connection = credential_store.get_connection(db, connection_id)
        if connection is None:
            raise NotFound(f"Connection {connection_id} not found")
        return connection

    def find_active_connection(self, platform: str, external_account_id: str) -> Optional[Connection]:
        with self._session_factory() as db:
            return credential_store.find_active(db, platform, external_account_id)

    def save_poll_cursor(self, connection_id: str, cursor: Optional[str], generation: int, finished: bool) -> bool:
        """Persist a poll cursor unless the connection went inactive or was disconnected meanwhile."""
        with self._session_factory() as db:
            connection = credential_store.get_connection(db, connection_id)
            if (
                connection is None
                or connection.status != ConnectionStatus.ACTIVE.value
                or self.generation(connection_id) != generation
            ):
                return False
            credential_store.save_cursor(connection, cursor, self._clock() if finished else None)
            db.commit()
        return True

    def list_connections(self) -> list[Connection]:
        with self._session_factory() as db:
            return credential_store.list_connections(db)
