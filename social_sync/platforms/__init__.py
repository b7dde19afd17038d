import logging

from social_sync.config import Settings
from social_sync.platforms.base import (
    AccountIdentity,
    ConversationPage,
    ExternalConversation,
    ExternalMessage,
    PlatformAdapter,
    SendResult,
    TokenGrant,
)
from social_sync.platforms.facebook import FacebookAdapter

logger = logging.getLogger(__name__)

__all__ = [
    "AccountIdentity",
    "ConversationPage",
    "ExternalConversation",
    "ExternalMessage",
    "FacebookAdapter",
    "PlatformAdapter",
    "SendResult",
    "TokenGrant",
    "build_platforms",
]


def build_platforms(settings: Settings) -> dict[str, PlatformAdapter]:
    """Instantiate the adapters whose credentials are configured."""
    platforms: dict[str, PlatformAdapter] = {}
    if settings.FACEBOOK_APP_ID and settings.FACEBOOK_APP_SECRET:
        platforms["facebook"] = FacebookAdapter(
            app_id=settings.FACEBOOK_APP_ID,
            app_secret=settings.FACEBOOK_APP_SECRET,
            redirect_uri=settings.FACEBOOK_REDIRECT_URI,
            graph_url=settings.FACEBOOK_GRAPH_URL,
            timeout=settings.HTTP_TIMEOUT_SECONDS,
            max_retries=settings.HTTP_MAX_RETRIES,
        )
    else:
        logger.warning("Facebook credentials not configured; facebook platform disabled")
    return platforms
