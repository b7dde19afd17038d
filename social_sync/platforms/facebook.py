"""
Facebook Page messaging adapter (Graph API).

Conversation threads are keyed by the page-scoped id (PSID) of the person
the page talks to: webhook deliveries only carry sender/recipient ids, and
Graph conversation listings expose the same PSIDs as participants, so both
delivery paths land in the same local conversation.
"""

import json
import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from social_sync.errors import (
    CredentialExpired,
    MalformedEvent,
    RateLimited,
    SendFailed,
    SocialSyncError,
    TokenExchangeFailed,
)
from social_sync.platforms.base import (
    AccountIdentity,
    ConversationPage,
    ExternalConversation,
    ExternalMessage,
    PlatformAdapter,
    SendResult,
    TokenGrant,
    request_with_retry,
)
from social_sync.utils import isoformat, parse_timestamp, utcnow

logger = logging.getLogger(__name__)

DIALOG_URL = "https://www.facebook.com/v18.0/dialog/oauth"

REQUIRED_PERMISSIONS = [
    "public_profile",
    "pages_show_list",
    "pages_read_engagement",
    "pages_manage_metadata",
    "pages_messaging",
]

# Graph error codes: 190 = invalid/expired token; the rest are throttling
TOKEN_ERROR_CODES = {102, 190}
RATE_LIMIT_ERROR_CODES = {4, 17, 32, 613}

CONVERSATION_PAGE_SIZE = 25
MESSAGE_FIELDS = "id,created_time,from,to,message,attachments"

WEBHOOK_FIELDS = ["messages", "messaging_postbacks", "message_deliveries", "message_reads"]


class FacebookAdapter(PlatformAdapter):
    name = "facebook"
    supports_refresh = True

    def __init__(
        self,
        app_id: str,
        app_secret: str,
        redirect_uri: str,
        graph_url: str = "https://graph.facebook.com/v18.0",
        timeout: float = 30.0,
        max_retries: int = 3,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.webhook_secret = app_secret
        self.redirect_uri = redirect_uri
        self.graph_url = graph_url.rstrip("/")
        self.max_retries = max_retries
        self._client = client or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        await self._client.aclose()

    # ------------------------------------------------------------------
    # OAuth
    # ------------------------------------------------------------------

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self.app_id,
            "redirect_uri": self.redirect_uri,
            "scope": ",".join(REQUIRED_PERMISSIONS),
            "response_type": "code",
            "state": state,
            "auth_type": "rerequest",
        }
        return f"{DIALOG_URL}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenGrant:
        data = await self._get(
            "/oauth/access_token",
            {
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "redirect_uri": self.redirect_uri,
                "code": code,
            },
            error_cls=TokenExchangeFailed,
        )
        short_lived = data.get("access_token")
        if not short_lived:
            raise TokenExchangeFailed("Token endpoint returned no access_token")

        # Page tokens derived from a long-lived user token do not expire
        return await self._long_lived(short_lived, error_cls=TokenExchangeFailed)

    async def fetch_accounts(self, grant: TokenGrant) -> list[AccountIdentity]:
        data = await self._get(
            "/me/accounts",
            {"access_token": grant.access_token, "fields": "id,name,access_token", "limit": 100},
            error_cls=TokenExchangeFailed,
        )
        accounts = []
        for page in data.get("data", []):
            if not page.get("id") or not page.get("access_token"):
                logger.warning("Skipping page without id or access token")
                continue
            accounts.append(
                AccountIdentity(
                    external_account_id=str(page["id"]),
                    display_name=page.get("name"),
                    grant=TokenGrant(access_token=page["access_token"]),
                )
            )
        if not accounts:
            raise TokenExchangeFailed("No Facebook pages were granted to this app")
        return accounts

    async def refresh_token(self, access_token: str, refresh_token: Optional[str]) -> TokenGrant:
        return await self._long_lived(refresh_token or access_token, error_cls=CredentialExpired)

    async def revoke_token(self, access_token: str, external_account_id: str) -> None:
        response = await request_with_retry(
            self._client,
            "DELETE",
            f"{self.graph_url}/{external_account_id}/subscribed_apps",
            max_retries=self.max_retries,
            params={"access_token": access_token},
        )
        self._check(response, SocialSyncError)

    async def subscribe_webhooks(self, access_token: str, external_account_id: str) -> None:
        response = await request_with_retry(
            self._client,
            "POST",
            f"{self.graph_url}/{external_account_id}/subscribed_apps",
            max_retries=self.max_retries,
            params={"access_token": access_token},
            json={"subscribed_fields": WEBHOOK_FIELDS},
        )
        data = self._check(response, SocialSyncError)
        if not data.get("success"):
            raise SocialSyncError(f"Webhook subscription for page {external_account_id} was not confirmed")

    async def _long_lived(self, token: str, error_cls: type[SocialSyncError]) -> TokenGrant:
        data = await self._get(
            "/oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": self.app_id,
                "client_secret": self.app_secret,
                "fb_exchange_token": token,
            },
            error_cls=error_cls,
        )
        if not data.get("access_token"):
            raise error_cls("Token endpoint returned no access_token")
        expires_in = data.get("expires_in")
        return TokenGrant(
            access_token=data["access_token"],
            expires_at=utcnow() + timedelta(seconds=int(expires_in)) if expires_in else None,
        )

    # ------------------------------------------------------------------
    # Conversations
    # ------------------------------------------------------------------

    async def fetch_conversations(
        self,
        access_token: str,
        external_account_id: str,
        cursor: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> ConversationPage:
        state = json.loads(cursor) if cursor else {}
        if since is not None:
            state["since"] = isoformat(since)
        since_at = parse_timestamp(state.get("since"))
        high_water = parse_timestamp(state.get("high_water")) or since_at

        params = {
            "access_token": access_token,
            "platform": "messenger",
            "fields": f"id,participants,updated_time,messages.limit({CONVERSATION_PAGE_SIZE}){{{MESSAGE_FIELDS}}}",
            "limit": CONVERSATION_PAGE_SIZE,
        }
        if state.get("after"):
            params["after"] = state["after"]

        data = await self._get(f"/{external_account_id}/conversations", params, error_cls=SocialSyncError)

        conversations = []
        reached_known = False
        # Graph lists conversations most recently updated first. Timestamps
        # have one-second resolution, so the boundary second is fetched again
        # and the idempotent upsert drops what was already stored.
        for raw in data.get("data", []):
            updated_at = parse_timestamp(raw.get("updated_time"))
            if since_at and updated_at and updated_at < since_at:
                reached_known = True
                break
            conversation = await self._conversation_from_graph(external_account_id, raw, since_at)
            if conversation is None:
                continue
            conversations.append(conversation)
            if updated_at and (high_water is None or updated_at > high_water):
                high_water = updated_at

        after = data.get("paging", {}).get("cursors", {}).get("after")
        has_next = bool(data.get("paging", {}).get("next")) and after and not reached_known

        if has_next:
            next_state = {"after": after, "since": isoformat(since_at), "high_water": isoformat(high_water)}
            return ConversationPage(conversations=conversations, next_cursor=json.dumps(next_state))
        sync_state = {"since": isoformat(high_water)} if high_water else {}
        return ConversationPage(conversations=conversations, sync_cursor=json.dumps(sync_state))

    async def _conversation_from_graph(
        self,
        account_id: str,
        raw: dict[str, Any],
        since_at: Optional[datetime],
    ) -> Optional[ExternalConversation]:
        participants = [
            {"id": str(p["id"]), "name": p.get("name")}
            for p in raw.get("participants", {}).get("data", [])
            if p.get("id")
        ]
        counterpart = next((p["id"] for p in participants if p["id"] != account_id), None)
        if counterpart is None:
            logger.warning(f"Skipping conversation {raw.get('id')} without a counterpart participant")
            return None

        messages = []
        listing = raw.get("messages", {})
        # messages come newest first; keep paging until one predates since_at
        while True:
            reached_since = False
            for msg in listing.get("data", []):
                sent_at = parse_timestamp(msg.get("created_time"))
                if not msg.get("id") or sent_at is None:
                    continue
                if since_at and sent_at < since_at:
                    reached_since = True
                    continue
                sender_id = str(msg.get("from", {}).get("id")) if msg.get("from") else None
                attachments = graph_attachments(msg)
                messages.append(
                    ExternalMessage(
                        external_thread_id=counterpart,
                        external_message_id=msg["id"],
                        sender_id=sender_id,
                        body=msg.get("message") or ("[Media]" if attachments else None),
                        sent_at=sent_at,
                        outbound=sender_id == account_id,
                        participants=participants,
                        attachments=attachments,
                    )
                )
            next_url = listing.get("paging", {}).get("next")
            if reached_since or not next_url:
                break
            listing = await self._get_url(next_url)

        return ExternalConversation(
            external_thread_id=counterpart,
            participants=participants,
            updated_at=parse_timestamp(raw.get("updated_time")),
            messages=messages,
        )

    async def send_message(
        self,
        access_token: str,
        external_account_id: str,
        recipient_id: str,
        body: str,
    ) -> SendResult:
        response = await request_with_retry(
            self._client,
            "POST",
            f"{self.graph_url}/me/messages",
            max_retries=self.max_retries,
            params={"access_token": access_token},
            json={
                "recipient": {"id": recipient_id},
                "message": {"text": body},
                "messaging_type": "RESPONSE",
            },
        )
        data = self._check(response, SendFailed)
        if not data.get("message_id"):
            raise SendFailed("Send API returned no message_id")
        return SendResult(external_message_id=data["message_id"], sent_at=utcnow())

    async def mark_read(self, access_token: str, external_account_id: str, recipient_id: str) -> None:
        response = await request_with_retry(
            self._client,
            "POST",
            f"{self.graph_url}/me/messages",
            max_retries=self.max_retries,
            params={"access_token": access_token},
            json={"recipient": {"id": recipient_id}, "sender_action": "mark_seen"},
        )
        self._check(response, SocialSyncError)

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    def split_webhook(self, payload: Any) -> list[tuple[str, Any]]:
        if not isinstance(payload, dict) or payload.get("object") != "page":
            raise MalformedEvent("Not a page webhook delivery")
        entries = payload.get("entry")
        if not isinstance(entries, list):
            raise MalformedEvent("Webhook delivery has no entry list")
        pairs = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                raise MalformedEvent("Webhook entry without page id")
            pairs.append((str(entry["id"]), entry))
        return pairs

    def parse_event(self, external_account_id: str, raw_event: Any) -> list[ExternalMessage]:
        if not isinstance(raw_event, dict):
            raise MalformedEvent("Webhook entry is not an object")
        messaging = raw_event.get("messaging", [])
        if not isinstance(messaging, list):
            raise MalformedEvent("messaging is not a list")

        messages = []
        for event in messaging:
            try:
                message = self._message_from_event(external_account_id, event)
            except MalformedEvent as e:
                logger.warning(f"Skipping malformed messaging event for page {external_account_id}: {e}")
                continue
            if message is not None:
                messages.append(message)
        return messages

    def _message_from_event(self, external_account_id: str, event: Any) -> Optional[ExternalMessage]:
        if not isinstance(event, dict):
            raise MalformedEvent("messaging event is not an object")
        message = event.get("message")
        # delivery, read and postback events carry no message to store
        if not message:
            return None
        if not isinstance(message, dict):
            raise MalformedEvent("message is not an object")
        try:
            sender_id = str(event["sender"]["id"])
            recipient_id = str(event["recipient"]["id"])
            mid = message["mid"]
        except (KeyError, TypeError) as e:
            raise MalformedEvent(f"Messaging event missing field: {e}")
        sent_at = parse_timestamp(event.get("timestamp"))
        if sent_at is None:
            raise MalformedEvent("Messaging event without a valid timestamp")

        outbound = bool(message.get("is_echo")) or sender_id == external_account_id
        counterpart = recipient_id if outbound else sender_id
        attachments = webhook_attachments(message)
        return ExternalMessage(
            external_thread_id=counterpart,
            external_message_id=mid,
            sender_id=sender_id,
            body=message.get("text") or ("[Media]" if attachments else None),
            sent_at=sent_at,
            outbound=outbound,
            participants=[{"id": counterpart, "name": None}],
            attachments=attachments,
        )

    # ------------------------------------------------------------------
    # HTTP helpers
    # ------------------------------------------------------------------

    async def _get_url(self, url: str) -> dict[str, Any]:
        """Follow a Graph ``paging.next`` link; it already carries the token and fields."""
        response = await request_with_retry(self._client, "GET", url, max_retries=self.max_retries)
        return self._check(response, SocialSyncError)

    async def _get(self, path: str, params: dict[str, Any], error_cls: type[SocialSyncError]) -> dict[str, Any]:
        response = await request_with_retry(
            self._client,
            "GET",
            f"{self.graph_url}{path}",
            max_retries=self.max_retries,
            params=params,
        )
        return self._check(response, error_cls)

    def _check(self, response: httpx.Response, error_cls: type[SocialSyncError]) -> dict[str, Any]:
        """Map Graph API errors onto the error taxonomy; return the JSON body."""
        try:
            data = response.json() if response.content else {}
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        error = data.get("error")
        if response.status_code < 400 and not error:
            return data

        error = error if isinstance(error, dict) else {}
        code = error.get("code")
        message = error.get("message") or f"Graph API returned HTTP {response.status_code}"

        if response.status_code == 429 or code in RATE_LIMIT_ERROR_CODES:
            retry_after = response.headers.get("Retry-After")
            raise RateLimited(message, retry_after=float(retry_after) if retry_after else None)
        if response.status_code == 401 or code in TOKEN_ERROR_CODES:
            if error_cls is TokenExchangeFailed:
                raise TokenExchangeFailed(message)
            raise CredentialExpired(message)
        raise error_cls(message, {"status": response.status_code, "graph_code": code})


def webhook_attachments(message: dict[str, Any]) -> list[dict[str, Any]]:
    """``message.attachments`` of a webhook event as [{type, url}]."""
    attachments = message.get("attachments")
    if not isinstance(attachments, list):
        return []
    return [
        {"type": a.get("type") or "file", "url": (a.get("payload") or {}).get("url")}
        for a in attachments
        if isinstance(a, dict)
    ]


def graph_attachments(message: dict[str, Any]) -> list[dict[str, Any]]:
    """Graph message ``attachments`` edge as [{type, url}]; type comes from the mime type."""
    result = []
    for a in (message.get("attachments") or {}).get("data", []):
        mime_type = a.get("mime_type") or ""
        url = (a.get("image_data") or {}).get("url") or (a.get("video_data") or {}).get("url") or a.get("file_url")
        result.append({"type": mime_type.split("/")[0] or "file", "url": url})
    return result
