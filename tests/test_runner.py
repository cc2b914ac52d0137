"""
AgentRunner tests: poll, WebSocket envelopes and connect
"""

import json

import pytest

from conftest import OVERLAY_URL, json_response, text_response
from overlay_agent.messaging.codec import SignedMessageCodec
from overlay_agent.messaging.relay import RelaySubscriber, subscribe_url
from overlay_agent.runner import AgentRunner
from overlay_agent.storage.state import read_jsonl


def signed(sender_ledger, to: str, msg_type: str, payload, msg_id: str):
    envelope = SignedMessageCodec(sender_ledger).envelope(sender_ledger.identity_key, to, msg_type, payload)
    return {"id": msg_id, **envelope}


@pytest.fixture
def events():
    return []


@pytest.fixture
def runner(ctx, events):
    return AgentRunner(ctx, on_event=events.append)


@pytest.fixture
def relay_routes(stub_fetch):
    stub_fetch.add("POST", f"{OVERLAY_URL}/relay/send", json_response({"id": "sent-1"}))
    stub_fetch.add("POST", f"{OVERLAY_URL}/relay/ack",
                   lambda call: json_response({"acked": len(call["json"]["messageIds"])}))
    return stub_fetch


@pytest.mark.asyncio
class TestPoll:

    async def test_poll_routes_and_batch_acks(self, runner, relay_routes, ledger, peer_ledger, events):
        me = ledger.identity_key
        relay_routes.add("GET", f"{OVERLAY_URL}/relay/inbox", json_response({"messages": [
            signed(peer_ledger, me, "ping", {"text": "hi"}, "m1"),
            signed(peer_ledger, me, "custom", {"x": 1}, "m2"),
            signed(peer_ledger, me, "pong", {"text": "pong", "inReplyTo": "m0"}, "m3"),
        ]}))

        result = await runner.poll()

        assert result["processed"] == 3
        assert result["acked"] == 2
        assert [r["action"] for r in result["results"]] == ["replied-pong", "unhandled", "received"]
        ack_call = relay_routes.calls_to("/relay/ack")[0]
        assert ack_call["json"]["messageIds"] == ["m1", "m3"]
        assert len(events) == 3

    async def test_string_payloads_are_still_acked(self, runner, relay_routes, ledger, peer_ledger):
        me = ledger.identity_key
        relay_routes.add("GET", f"{OVERLAY_URL}/relay/inbox", json_response({"messages": [
            signed(peer_ledger, me, "pong", {"text": "pong"}, "m1"),
            signed(peer_ledger, me, "pong", "hi", "m2"),
            signed(peer_ledger, me, "ping", ["hi"], "m3"),
        ]}))

        result = await runner.poll()

        assert result["acked"] == 3
        assert relay_routes.calls_to("/relay/ack")[0]["json"]["messageIds"] == ["m1", "m2", "m3"]

    async def test_failing_message_does_not_block_the_batch(self, runner, relay_routes, ledger, peer_ledger):
        async def explode(msg):
            raise RuntimeError("handler crashed")

        runner.router.register_service("boom", explode)
        me = ledger.identity_key
        relay_routes.add("GET", f"{OVERLAY_URL}/relay/inbox", json_response({"messages": [
            signed(peer_ledger, me, "service-request", {"serviceId": "boom"}, "m1"),
            signed(peer_ledger, me, "pong", {"text": "pong"}, "m2"),
        ]}))

        result = await runner.poll()

        assert result["processed"] == 2
        assert result["results"][0]["ack"] is False
        assert result["results"][0]["error"] == "handler crashed"
        assert relay_routes.calls_to("/relay/ack")[0]["json"]["messageIds"] == ["m2"]

    async def test_empty_inbox_sends_no_ack(self, runner, relay_routes):
        relay_routes.add("GET", f"{OVERLAY_URL}/relay/inbox", json_response({"messages": []}))

        result = await runner.poll(since="1700000000000")

        assert result == {"processed": 0, "acked": 0, "results": []}
        assert relay_routes.calls_to("/relay/ack") == []
        assert relay_routes.calls_to("/relay/inbox")[0]["params"]["since"] == "1700000000000"


@pytest.mark.asyncio
class TestHandleEnvelope:

    async def test_message_is_recorded_and_acked(self, runner, relay_routes, ctx, ledger, peer_ledger, events):
        msg = signed(peer_ledger, ledger.identity_key, "ping", {"text": "hi"}, "m1")

        await runner.handle_envelope({"type": "message", "message": msg})

        notifications = read_jsonl(ctx.config.notifications_path)
        assert notifications[0]["action"] == "replied-pong"
        assert isinstance(notifications[0]["_ts"], int)
        assert events == notifications
        assert relay_routes.calls_to("/relay/ack")[0]["json"]["messageIds"] == ["m1"]

    async def test_ack_failure_does_not_raise(self, runner, stub_fetch, ctx, ledger, peer_ledger):
        stub_fetch.add("POST", f"{OVERLAY_URL}/relay/send", json_response({"id": "sent-1"}))
        stub_fetch.add("POST", f"{OVERLAY_URL}/relay/ack", text_response("down", 503))
        msg = signed(peer_ledger, ledger.identity_key, "ping", {"text": "hi"}, "m1")

        await runner.handle_envelope({"type": "message", "message": msg})

        assert len(read_jsonl(ctx.config.notifications_path)) == 1

    async def test_unhandled_message_is_not_acked(self, runner, relay_routes, ledger, peer_ledger):
        msg = signed(peer_ledger, ledger.identity_key, "custom", {}, "m9")

        await runner.handle_envelope({"type": "message", "message": msg})

        assert relay_routes.calls_to("/relay/ack") == []

    async def test_service_announcement(self, runner, ctx, events, peer_ledger):
        await runner.handle_envelope({
            "type": "service-announced",
            "txid": "ab" * 32,
            "service": {"serviceId": "tell-joke", "name": "Joke", "description": "Jokes",
                        "pricingSats": 5, "identityKey": peer_ledger.identity_key},
        })

        announcement = read_jsonl(ctx.config.notifications_path)[0]
        assert announcement["event"] == "service-announced"
        assert announcement["priceSats"] == 5
        assert announcement["provider"] == peer_ledger.identity_key
        assert announcement["txid"] == "ab" * 32
        assert events == [announcement]

    async def test_unknown_envelope_is_ignored(self, runner, ctx, events):
        await runner.handle_envelope({"type": "heartbeat"})
        assert events == []
        assert read_jsonl(ctx.config.notifications_path) == []


@pytest.mark.asyncio
class TestConnect:

    async def test_connect_runs_given_subscriber(self, runner):
        ran = []

        class Subscriber:
            async def run(self):
                ran.append(True)

        await runner.connect(subscriber=Subscriber())
        assert ran == [True]

    async def test_subscriber_feeds_handle_envelope(self, runner, relay_routes, ctx, ledger, peer_ledger):
        frames = [json.dumps({"type": "message",
                              "message": signed(peer_ledger, ledger.identity_key, "ping", {"text": "hi"}, "m1")})]
        urls = []

        class Socket:
            def __aiter__(self):
                return self._iterate()

            async def _iterate(self):
                for frame in frames:
                    yield frame
                runner.shutdown.request()

            async def close(self):
                pass

        async def connect(url):
            urls.append(url)
            return Socket()

        url = subscribe_url(ctx.config.relay_ws_url, ledger.identity_key)
        subscriber = RelaySubscriber(url, runner.handle_envelope, runner.shutdown, connect=connect)

        await runner.connect(subscriber=subscriber)

        assert urls == [f"ws://overlay.test/relay/subscribe?identity={ledger.identity_key}"]
        assert read_jsonl(ctx.config.notifications_path)[0]["id"] == "m1"
