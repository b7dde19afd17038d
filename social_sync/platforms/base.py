"""
Platform adapter interface.

The connection manager and sync engine only talk to platforms through
``PlatformAdapter``; each supported platform ships one implementation.
Adapters translate platform wire formats into the plain records below and
platform failures into the errors in ``social_sync.errors``.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

import httpx

logger = logging.getLogger(__name__)


@dataclass
class TokenGrant:
    access_token: str
    refresh_token: Optional[str] = None
    # None for tokens that never expire
    expires_at: Optional[datetime] = None


@dataclass
class AccountIdentity:
    """An external account the authorizing user granted access to."""
    external_account_id: str
    display_name: Optional[str]
    grant: TokenGrant


@dataclass
class ExternalMessage:
    external_thread_id: str
    external_message_id: str
    sender_id: Optional[str]
    body: Optional[str]
    sent_at: datetime
    outbound: bool = False
    participants: list[dict[str, Any]] = field(default_factory=list)
    # [{"type": "image", "url": "..."}]
    attachments: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ExternalConversation:
    external_thread_id: str
    participants: list[dict[str, Any]] = field(default_factory=list)
    updated_at: Optional[datetime] = None
    messages: list[ExternalMessage] = field(default_factory=list)


@dataclass
class ConversationPage:
    """
    One page of a conversation listing.

    ``next_cursor`` fetches the following page; when it is None the listing
    is exhausted and ``sync_cursor`` is where the next incremental poll starts.
    """
    conversations: list[ExternalConversation]
    next_cursor: Optional[str] = None
    sync_cursor: Optional[str] = None


@dataclass
class SendResult:
    external_message_id: str
    sent_at: Optional[datetime] = None


class PlatformAdapter(ABC):
    """Capabilities the sync layer needs from an OAuth messaging platform."""

    name: str = ""
    supports_refresh: bool = False
    # HMAC key for webhook signatures; None means deliveries cannot be verified
    webhook_secret: Optional[str] = None

    @abstractmethod
    def authorization_url(self, state: str) -> str:
        """URL the browser is sent to for consent; ``state`` comes back on the redirect."""

    @abstractmethod
    async def exchange_code(self, code: str) -> TokenGrant:
        """Exchange an authorization code for a user token. Raises TokenExchangeFailed."""

    @abstractmethod
    async def fetch_accounts(self, grant: TokenGrant) -> list[AccountIdentity]:
        """Accounts (pages) reachable with the user token, each with its own token."""

    async def refresh_token(self, access_token: str, refresh_token: Optional[str]) -> TokenGrant:
        raise NotImplementedError(f"{self.name} does not support token refresh")

    async def revoke_token(self, access_token: str, external_account_id: str) -> None:
        """Best-effort remote revocation. Default: nothing to revoke."""
        return None

    async def subscribe_webhooks(self, access_token: str, external_account_id: str) -> None:
        """Ask the platform to push events for a newly connected account. Default: nothing to do."""
        return None

    @abstractmethod
    async def fetch_conversations(
        self,
        access_token: str,
        external_account_id: str,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> ConversationPage:
        """Fetch one page of conversations with their recent messages."""

    @abstractmethod
    async def send_message(
        self,
        access_token: str,
        external_account_id: str,
        recipient_id: str,
        body: str,
    ) -> SendResult:
        """Send a text message. Raises SendFailed, RateLimited or CredentialExpired."""

    async def mark_read(
        self,
        access_token: str,
        external_account_id: str,
        recipient_id: str,
    ) -> None:
        return None

    @abstractmethod
    def split_webhook(self, payload: Any) -> list[tuple[str, Any]]:
        """
        Split a raw webhook delivery into (external_account_id, raw_event) pairs.
        Raises MalformedEvent.
        """

    @abstractmethod
    def parse_event(self, external_account_id: str, raw_event: Any) -> list[ExternalMessage]:
        """Parse one raw event into zero or more messages. Raises MalformedEvent."""


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    max_retries: int = 3,
    base_delay: float = 0.5,
    **kwargs: Any,
) -> httpx.Response:
    """
    Perform an HTTP request, retrying transport errors and 5xx responses
    with exponential backoff. 4xx responses are returned to the caller.
    """
    attempt = 0
    while True:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.TransportError as e:
            if attempt >= max_retries:
                raise
            logger.warning(f"{method} {url.split('?')[0]} failed ({e!r}), retry {attempt + 1}/{max_retries}")
        else:
            if response.status_code < 500 or attempt >= max_retries:
                return response
            logger.warning(
                f"{method} {url.split('?')[0]} returned {response.status_code}, retry {attempt + 1}/{max_retries}"
            )
        await asyncio.sleep(base_delay * (2 ** attempt))
        attempt += 1
