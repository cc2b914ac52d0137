"""
Outgoing service-request and service-response tests
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from overlay_agent.context import AgentContext
from overlay_agent.errors import ValidationError
from overlay_agent.services.queue import ServiceQueue, ServiceQueueEntry
from overlay_agent.services.requests import request_service, respond_service, validate_identity_key

TARGET = "02" + "ab" * 32


@pytest.fixture
def relay():
    relay = MagicMock()
    relay.send = AsyncMock(return_value="msg-1")
    return relay


class TestValidation:

    @pytest.mark.parametrize("key", ["", "04" + "ab" * 32, "02" + "ab" * 31, "02" + "zz" * 32])
    def test_bad_identity_keys(self, key):
        with pytest.raises(ValidationError):
            validate_identity_key(key)

    def test_good_identity_key(self):
        assert validate_identity_key(TARGET) == TARGET


@pytest.mark.asyncio
class TestRequestService:

    async def test_paid_request(self, ctx, relay, wallet):
        result = await request_service(ctx, relay, TARGET, "tell-joke", 7, {"topic": "cats"})

        assert result["paymentIncluded"] is True
        assert result["requestId"] == "msg-1"
        assert result["satoshis"] == 7
        assert wallet.created == [{"to": TARGET, "satoshis": 7, "description": "service-request: tell-joke"}]
        assert wallet.destroyed == 1

        to, msg_type, payload = relay.send.await_args.args
        assert (to, msg_type) == (TARGET, "service-request")
        assert payload["serviceId"] == "tell-joke"
        assert payload["input"] == {"topic": "cats"}
        assert payload["payment"]["beef"] == "beef-" + TARGET[:8]
        assert payload["payment"]["derivationPrefix"] == "prefix"

    async def test_payment_failure_is_forwarded(self, ctx, relay, wallet):
        wallet.create_error = RuntimeError("insufficient funds")

        result = await request_service(ctx, relay, TARGET, "tell-joke", 7)

        assert result["paymentIncluded"] is False
        assert result["satoshis"] == 0
        payload = relay.send.await_args.args[2]
        assert payload["payment"] == {"error": "insufficient funds"}
        assert "input" not in payload
        assert wallet.destroyed == 1

    async def test_free_request_skips_wallet(self, ctx, relay, wallet_provider):
        result = await request_service(ctx, relay, TARGET, "tell-joke", 0)

        assert result["paymentIncluded"] is False
        assert relay.send.await_args.args[2]["payment"] is None
        assert wallet_provider.loads == 0

    async def test_missing_wallet_provider(self, config, ledger, stub_fetch, relay):
        ctx = AgentContext(config=config, ledger=ledger, fetch=stub_fetch)

        result = await request_service(ctx, relay, TARGET, "tell-joke", 5)

        assert result["paymentIncluded"] is False
        assert "No wallet provider" in relay.send.await_args.args[2]["payment"]["error"]

    @pytest.mark.parametrize("target, service_id, sats", [
        ("not-a-key", "tell-joke", 5),
        (TARGET, "", 5),
        (TARGET, "tell-joke", -1),
    ])
    async def test_invalid_arguments(self, ctx, relay, target, service_id, sats):
        with pytest.raises(ValidationError):
            await request_service(ctx, relay, target, service_id, sats)
        relay.send.assert_not_awaited()


@pytest.mark.asyncio
class TestRespondService:

    async def test_response_marks_queue_fulfilled(self, config, relay):
        queue = ServiceQueue(config.service_queue_path)
        queue.enqueue(ServiceQueueEntry(
            request_id="req-1", service_id="tell-joke", sender=TARGET, identity_key="03" + "cd" * 32,
            input={}, payment_txid="ef" * 32, satoshis_received=5, wallet_accepted=True,
        ))

        result = await respond_service(relay, queue, "req-1", TARGET, "tell-joke", {"joke": "..."})

        assert result["queueUpdated"] is True
        assert queue.list_pending() == []
        to, msg_type, payload = relay.send.await_args.args
        assert msg_type == "service-response"
        assert payload == {"requestId": "req-1", "serviceId": "tell-joke", "status": "fulfilled",
                           "result": {"joke": "..."}}

    async def test_unknown_request_still_sends(self, config, relay):
        queue = ServiceQueue(config.service_queue_path)

        result = await respond_service(relay, queue, "req-x", TARGET, "tell-joke", "done")

        assert result["sent"] is True
        assert result["queueUpdated"] is False
