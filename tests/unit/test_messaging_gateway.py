"""Tests for the Twilio Conversations gateway."""

import json
from urllib.parse import parse_qs

import httpx
import pytest

from app.core.errors import GatewayError, GatewayReadError, GatewaySendError
from app.infra.cache import InMemoryCache
from app.infra.messaging import (
    INBOUND,
    OUTBOUND,
    TYPE_CONFIRMATION,
    TYPE_MESSAGE,
    ConversationMessage,
    TwilioConversationsGateway,
)


class TestConversationMessage:
    """Test ConversationMessage parsing."""

    def test_from_twilio_outbound(self):
        """Clinic-authored messages are outbound and carry their attributes."""
        data = {
            "sid": "IM001",
            "conversation_sid": "CH001",
            "author": "Clinic",
            "body": "Can you come Wednesday?",
            "index": 4,
            "date_created": "2030-01-16T09:30:00Z",
            "attributes": json.dumps({"type": "Confirmation", "resolvedBy": "IM002"}),
        }

        message = ConversationMessage.from_twilio(data, "CH001", "clinic")

        assert message.direction == OUTBOUND
        assert message.type == TYPE_CONFIRMATION
        assert message.resolved_by_ref == "IM002"
        assert message.index == 4
        assert message.created_at.isoformat() == "2030-01-16T09:30:00+00:00"

    def test_from_twilio_inbound_with_bad_attributes(self):
        """Other authors are inbound; unreadable attributes are ignored."""
        data = {"sid": "IM002", "author": "+61400000000", "body": "yes", "attributes": "not json"}

        message = ConversationMessage.from_twilio(data, "CH001", "clinic")

        assert message.direction == INBOUND
        assert message.type == TYPE_MESSAGE
        assert message.conversation_ref == "CH001"
        assert message.created_at is None


class TestTwilioConversationsGateway:
    """Test the HTTP client against a mock transport."""

    @pytest.fixture
    def requests(self):
        return []

    def make_gateway(self, requests, handler_overrides=None):
        overrides = handler_overrides or {}

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            key = (request.method, request.url.path)
            if key in overrides:
                return overrides[key](request)
            if request.url.path == "/v1/Conversations/CH001":
                return httpx.Response(200, json={"sid": "CH001", "chat_service_sid": "IS001"})
            if request.method == "POST":
                return httpx.Response(201, json={"sid": "IM100"})
            return httpx.Response(
                200,
                json={
                    "messages": [
                        {"sid": "IM3", "author": "+614", "body": "yes", "index": 3},
                        {"sid": "IM2", "author": "clinic", "body": "Wednesday?", "index": 2,
                         "attributes": "{\"type\": \"Confirmation\"}"},
                    ]
                },
            )

        return TwilioConversationsGateway(
            cache=InMemoryCache(),
            base_url="https://conversations.test",
            account_sid="AC123",
            auth_token="secret",
            author="clinic",
            transport=httpx.MockTransport(handler),
        )

    @pytest.mark.asyncio
    async def test_send_message(self, requests):
        """Test sending posts author, body and typed attributes."""
        gateway = self.make_gateway(requests)

        message_ref = await gateway.send_message(
            "CH001", "Can you come?", type=TYPE_CONFIRMATION, attributes={"slotId": "s1"}
        )
        await gateway.close()

        assert message_ref == "IM100"
        post = requests[-1]
        assert post.url.path == "/v1/Services/IS001/Conversations/CH001/Messages"
        form = parse_qs(post.content.decode())
        assert form["Author"] == ["clinic"]
        assert form["Body"] == ["Can you come?"]
        assert json.loads(form["Attributes"][0]) == {"type": "Confirmation", "slotId": "s1"}

    @pytest.mark.asyncio
    async def test_chat_service_lookup_cached(self, requests):
        """Test the conversation lookup happens once per conversation."""
        gateway = self.make_gateway(requests)

        await gateway.send_message("CH001", "one")
        await gateway.send_message("CH001", "two")
        await gateway.close()

        lookups = [r for r in requests if r.url.path == "/v1/Conversations/CH001"]
        assert len(lookups) == 1
        assert await gateway.cache.get("twilio:chat-service:CH001") == "IS001"

    @pytest.mark.asyncio
    async def test_send_failure_raises(self, requests):
        """Test gateway errors surface as GatewaySendError."""
        gateway = self.make_gateway(
            requests,
            {("POST", "/v1/Services/IS001/Conversations/CH001/Messages"): lambda r: httpx.Response(503)},
        )

        with pytest.raises(GatewaySendError):
            await gateway.send_message("CH001", "hello")
        await gateway.close()

    @pytest.mark.asyncio
    async def test_list_recent_messages(self, requests):
        """Test messages come back oldest first with direction resolved."""
        gateway = self.make_gateway(requests)

        messages = await gateway.list_recent_messages("CH001", 5)
        await gateway.close()

        assert [m.message_ref for m in messages] == ["IM2", "IM3"]
        assert messages[0].is_outbound and messages[0].type == TYPE_CONFIRMATION
        assert messages[1].is_inbound
        listing = requests[-1]
        assert listing.url.params["Order"] == "desc"
        assert listing.url.params["PageSize"] == "5"

    @pytest.mark.asyncio
    async def test_lookup_failure_raises_read_error(self, requests):
        """Test an unavailable conversation lookup surfaces as GatewayReadError."""
        gateway = self.make_gateway(
            requests, {("GET", "/v1/Conversations/CH001"): lambda r: httpx.Response(503)}
        )

        with pytest.raises(GatewayReadError) as exc_info:
            await gateway.list_recent_messages("CH001", 5)
        await gateway.close()

        assert isinstance(exc_info.value, GatewayError)
        assert await gateway.cache.get("twilio:chat-service:CH001") is None

    @pytest.mark.asyncio
    async def test_list_failure_raises_read_error(self, requests):
        """Test a failed history read surfaces as GatewayReadError."""
        gateway = self.make_gateway(
            requests,
            {("GET", "/v1/Services/IS001/Conversations/CH001/Messages"): lambda r: httpx.Response(503)},
        )

        with pytest.raises(GatewayReadError):
            await gateway.list_recent_messages("CH001", 5)
        await gateway.close()

    @pytest.mark.asyncio
    async def test_send_with_failed_lookup_raises_send_error(self, requests):
        """Test a failed lookup while sending is reported as a send failure."""
        gateway = self.make_gateway(
            requests, {("GET", "/v1/Conversations/CH001"): lambda r: httpx.Response(503)}
        )

        with pytest.raises(GatewaySendError):
            await gateway.send_message("CH001", "hello")
        await gateway.close()

        assert all(r.method == "GET" for r in requests)
