"""
Messaging gateway.

The engine talks to the SMS gateway only through ``MessagingGateway``.
``TwilioConversationsGateway`` implements it over the Twilio Conversations
REST API:
- GET  /v1/Conversations/{sid} - Resolve the chat service of a conversation
- GET  /v1/Services/{is}/Conversations/{sid}/Messages - Recent messages
- POST /v1/Services/{is}/Conversations/{sid}/Messages - Send a message
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

import httpx

from app.config import get_settings
from app.core.errors import GatewayReadError, GatewaySendError
from app.infra.cache import Cache, InMemoryCache

logger = logging.getLogger(__name__)

INBOUND = "inbound"
OUTBOUND = "outbound"

# Message types carried in message attributes
TYPE_MESSAGE = "Message"
TYPE_CONFIRMATION = "Confirmation"


@dataclass
class ConversationMessage:
    """One message of a gateway conversation."""

    conversation_ref: str
    message_ref: str
    direction: str
    body: str = ""
    type: str = TYPE_MESSAGE
    index: int = 0
    created_at: Optional[datetime] = None
    author: str = ""
    resolved_by_ref: Optional[str] = None
    responds_to_ref: Optional[str] = None

    @property
    def is_inbound(self) -> bool:
        return self.direction == INBOUND

    @property
    def is_outbound(self) -> bool:
        return self.direction == OUTBOUND

    @classmethod
    def from_twilio(cls, data: dict, conversation_ref: str, clinic_author: str) -> "ConversationMessage":
        """Create from a Twilio Conversations message resource."""
        raw_attributes = data.get("attributes") or "{}"
        try:
            attributes = json.loads(raw_attributes) if isinstance(raw_attributes, str) else dict(raw_attributes)
        except ValueError:
            attributes = {}

        author = data.get("author") or ""
        return cls(
            conversation_ref=data.get("conversation_sid", conversation_ref),
            message_ref=data.get("sid", ""),
            direction=OUTBOUND if author.lower() == clinic_author.lower() else INBOUND,
            body=data.get("body") or "",
            type=attributes.get("type", TYPE_MESSAGE),
            index=int(data.get("index") or 0),
            created_at=_parse_timestamp(data.get("date_created")),
            author=author,
            resolved_by_ref=attributes.get("resolvedBy"),
            responds_to_ref=attributes.get("respondsTo"),
        )


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class MessagingGateway(ABC):
    """Abstract SMS gateway."""

    @abstractmethod
    async def send_message(
        self,
        conversation_ref: str,
        body: str,
        type: str = TYPE_MESSAGE,
        attributes: Optional[dict[str, Any]] = None,
    ) -> str:
        """Send a message and return its gateway reference.

        Raises:
            GatewaySendError: Message was not accepted by the gateway
        """

    @abstractmethod
    async def list_recent_messages(self, conversation_ref: str, limit: int) -> list[ConversationMessage]:
        """Most recent ``limit`` messages, oldest first.

        Raises:
            GatewayReadError: History could not be read from the gateway
        """

    async def close(self) -> None:
        """Release network resources."""


class TwilioConversationsGateway(MessagingGateway):
    """
    HTTP client for the Twilio Conversations API.

    The conversation -> chat service lookup is cached through the injected
    ``Cache`` so repeated sends on one conversation cost a single fetch.
    """

    CACHE_PREFIX = "twilio:chat-service:"

    def __init__(
        self,
        cache: Optional[Cache] = None,
        base_url: Optional[str] = None,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        author: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize client.

        Args:
            cache: Lookup cache (defaults to a process-local cache)
            base_url: Conversations API base URL (defaults to settings)
            account_sid: Basic-auth user (defaults to settings)
            auth_token: Basic-auth password (defaults to settings)
            author: Identity stamped on outbound messages
            timeout: Request timeout in seconds
            transport: Custom httpx transport (tests)
        """
        settings = get_settings()
        self.cache = cache or InMemoryCache()
        self.base_url = base_url or settings.twilio_conversations_url
        self.account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
        self.auth_token = auth_token if auth_token is not None else settings.twilio_auth_token
        self.author = author or settings.gateway_author
        self.timeout = timeout or settings.gateway_timeout
        self.cache_ttl = settings.conversation_cache_ttl
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                auth=(self.account_sid, self.auth_token),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def get_chat_service(self, conversation_ref: str) -> str:
        """Resolve the chat service a conversation belongs to.

        Raises:
            GatewayReadError: Conversation could not be fetched
        """
        cache_key = f"{self.CACHE_PREFIX}{conversation_ref}"
        cached = await self.cache.get(cache_key)
        if cached:
            return cached

        client = await self._get_client()
        try:
            response = await client.get(f"/v1/Conversations/{conversation_ref}")
            response.raise_for_status()
            chat_service = response.json()["chat_service_sid"]
        except (httpx.HTTPError, KeyError, ValueError) as e:
            logger.error(f"Failed to look up conversation {conversation_ref}: {e}")
            raise GatewayReadError(f"Conversation {conversation_ref} could not be read: {e}") from e

        await self.cache.set(cache_key, chat_service, ttl=self.cache_ttl)
        return chat_service

    async def _messages_path(self, conversation_ref: str) -> str:
        chat_service = await self.get_chat_service(conversation_ref)
        return f"/v1/Services/{chat_service}/Conversations/{conversation_ref}/Messages"

    async def send_message(
        self,
        conversation_ref: str,
        body: str,
        type: str = TYPE_MESSAGE,
        attributes: Optional[dict[str, Any]] = None,
    ) -> str:
        client = await self._get_client()
        payload_attributes = {"type": type, **(attributes or {})}

        try:
            response = await client.post(
                await self._messages_path(conversation_ref),
                data={
                    "Author": self.author,
                    "Body": body,
                    "Attributes": json.dumps(payload_attributes),
                },
            )
            response.raise_for_status()
            message_ref = response.json()["sid"]
        except (httpx.HTTPError, KeyError, ValueError, GatewayReadError) as e:
            logger.error(f"Failed to send message to conversation {conversation_ref}: {e}")
            raise GatewaySendError(f"Message to {conversation_ref} was not delivered: {e}") from e

        logger.info(f"Sent {type} message {message_ref} to conversation {conversation_ref}")
        return message_ref

    async def list_recent_messages(self, conversation_ref: str, limit: int) -> list[ConversationMessage]:
        client = await self._get_client()

        path = await self._messages_path(conversation_ref)
        try:
            response = await client.get(path, params={"Order": "desc", "PageSize": limit})
            response.raise_for_status()
            data = response.json().get("messages", [])[:limit]
            messages = [ConversationMessage.from_twilio(m, conversation_ref, self.author) for m in data]
        except (httpx.HTTPError, AttributeError, TypeError, ValueError) as e:
            logger.error(f"Failed to read messages of conversation {conversation_ref}: {e}")
            raise GatewayReadError(f"Messages of {conversation_ref} could not be read: {e}") from e

        messages.sort(key=lambda m: m.index)
        return messages
