import asyncio
import json

import pytest

from pulse_relay.connection import Connection
from pulse_relay.errors import HandlerRegistrationError
from pulse_relay.models.envelope import EnvelopeType
from pulse_relay.models.principal import Principal
from pulse_relay.relay import MessageRelay
from pulse_relay.transport.envelope import build_envelope

from fakes import ALICE, BOB, FakeTransport

CAROL = Principal(id="carol", role="user")


def typing_frame(conversation_id="c1", type_="typing"):
    return json.dumps({"type": type_, "conversation_id": conversation_id})


class TestPublish:
    @pytest.mark.asyncio
    async def test_new_message_reaches_every_member(self, relay, connect):
        _, alice_t = connect(ALICE)
        _, bob_t = connect(BOB)

        delivered = await relay.publish("c1", {"type": "new_message", "message": {"id": "m1"}})

        assert delivered == 2
        for transport in (alice_t, bob_t):
            [env] = transport.envelopes
            assert env["type"] == "new_message"
            assert env["conversation_id"] == "c1"
            assert env["message"]["id"] == "m1"

    @pytest.mark.asyncio
    async def test_publish_message_helper(self, relay, connect):
        _, bob_t = connect(BOB)
        await relay.publish_message("c1", {"id": "m2", "content": "hi"})
        assert bob_t.envelopes[0]["message"] == {"id": "m2", "content": "hi"}

    @pytest.mark.asyncio
    async def test_every_tab_of_a_member_receives(self, relay, connect):
        _, tab1 = connect(BOB)
        _, tab2 = connect(BOB)
        assert await relay.publish_message("c1", {"id": "m1"}) == 2
        assert len(tab1.sent) == len(tab2.sent) == 1

    @pytest.mark.asyncio
    async def test_offline_members_are_skipped(self, relay, connect):
        _, alice_t = connect(ALICE)
        assert await relay.publish_message("c1", {"id": "m1"}) == 1
        assert len(alice_t.sent) == 1

    @pytest.mark.asyncio
    async def test_non_members_receive_nothing(self, relay, connect):
        _, carol_t = connect(CAROL)
        await relay.publish_message("c1", {"id": "m1"})
        assert carol_t.sent == []

    @pytest.mark.asyncio
    async def test_unknown_conversation_is_dropped(self, relay, connect):
        _, alice_t = connect(ALICE)
        assert await relay.publish_message("missing", {"id": "m1"}) == 0
        assert alice_t.sent == []

    @pytest.mark.asyncio
    async def test_writes_to_one_connection_keep_publish_order(self, relay, connect):
        _, bob_t = connect(BOB)
        await asyncio.gather(*(relay.publish_message("c1", {"id": f"m{i}"}) for i in range(5)))
        assert [env["message"]["id"] for env in bob_t.envelopes] == [f"m{i}" for i in range(5)]

    @pytest.mark.asyncio
    async def test_send_to_principal(self, relay, connect):
        _, carol_t = connect(CAROL)
        env = build_envelope(EnvelopeType.NEW_MESSAGE, "c9", message={"id": "m9"})
        assert await relay.send_to_principal("carol", env) == 1
        assert carol_t.envelopes[0]["conversation_id"] == "c9"


class TestFanOutFailures:
    @pytest.mark.asyncio
    async def test_failed_write_is_isolated_and_unregistered(self, relay, registry, connect):
        broken, broken_t = connect(BOB)
        _, healthy_t = connect(BOB)
        _, alice_t = connect(ALICE)
        broken_t.fail = True

        delivered = await relay.publish_message("c1", {"id": "m1"})
        await asyncio.sleep(0)

        assert delivered == 2
        assert len(healthy_t.sent) == 1
        assert len(alice_t.sent) == 1
        assert broken not in registry.connections_for("bob")
        assert broken.closed
        assert broken_t.closed_with == (1011, "write failed")

    @pytest.mark.asyncio
    async def test_write_deadline_drops_slow_connection(self, relay, registry, connect):
        slow, slow_t = connect(BOB)
        _, alice_t = connect(ALICE)
        slow_t.hang = True

        delivered = await relay.publish_message("c1", {"id": "m1"})

        assert delivered == 1
        assert len(alice_t.sent) == 1
        assert registry.connections_for("bob") == set()

    @pytest.mark.asyncio
    async def test_failure_is_not_raised_to_publisher(self, relay, connect):
        _, bob_t = connect(BOB)
        bob_t.fail = True
        assert await relay.publish_message("c1", {"id": "m1"}) == 0


class TestInbound:
    @pytest.mark.asyncio
    async def test_typing_is_fanned_out_with_sender_id(self, relay, connect):
        alice, alice_t = connect(ALICE)
        _, bob_t = connect(BOB)

        await relay.handle_inbound(alice, typing_frame())

        [env] = bob_t.envelopes
        assert env["type"] == "typing"
        assert env["conversation_id"] == "c1"
        assert env["user_id"] == "alice"
        assert alice_t.sent == []
        assert relay.typing.typing_in("c1") == {"alice"}

    @pytest.mark.asyncio
    async def test_sender_user_id_cannot_be_spoofed(self, relay, connect):
        alice, _ = connect(ALICE)
        _, bob_t = connect(BOB)
        await relay.handle_inbound(alice, json.dumps({"type": "typing", "conversation_id": "c1", "user_id": "bob"}))
        assert bob_t.envelopes[0]["user_id"] == "alice"

    @pytest.mark.asyncio
    async def test_echo_to_sender(self, registry, membership, reads, clock):
        relay = MessageRelay(registry, members=membership, reads=reads, echo_to_sender=True, clock=clock)
        transports = {}
        for name, principal in (("alice", ALICE), ("alice_tab2", ALICE), ("bob", BOB)):
            transports[name] = FakeTransport()
            conn = Connection(transports[name], principal)
            registry.register(principal, conn)
            if name == "alice":
                origin = conn

        await relay.handle_inbound(origin, typing_frame())

        assert all(len(t.sent) == 1 for t in transports.values())

    @pytest.mark.asyncio
    async def test_stop_typing(self, relay, connect):
        alice, _ = connect(ALICE)
        _, bob_t = connect(BOB)
        await relay.handle_inbound(alice, typing_frame())
        await relay.handle_inbound(alice, typing_frame(type_="stop_typing"))
        assert [env["type"] for env in bob_t.envelopes] == ["typing", "stop_typing"]
        assert relay.typing.typing_in("c1") == set()

    @pytest.mark.asyncio
    async def test_message_read_records_then_fans_out(self, relay, reads, connect):
        bob, _ = connect(BOB)
        _, alice_t = connect(ALICE)

        await relay.handle_inbound(bob, typing_frame(type_="message_read"))

        assert reads.recorded == [("c1", "bob")]
        [env] = alice_t.envelopes
        assert env["type"] == "message_read"
        assert env["user_id"] == "bob"

    @pytest.mark.asyncio
    async def test_failed_read_receipt_is_not_announced(self, relay, reads, connect):
        bob, bob_t = connect(BOB)
        _, alice_t = connect(ALICE)
        reads.fail = True

        await relay.handle_inbound(bob, typing_frame(type_="message_read"))

        assert alice_t.sent == []
        assert not bob.closed

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "raw",
        [
            '{"type": "user_online", "conversation_id": "c1"}',
            '{"type": "new_message", "conversation_id": "c1", "message": {"id": "forged"}}',
            '{"type": "typing"}',
            "not json",
            "",
        ],
    )
    async def test_dropped_frames_cause_no_fan_out(self, relay, membership, connect, raw):
        alice, alice_t = connect(ALICE)
        _, bob_t = connect(BOB)

        await relay.handle_inbound(alice, raw)

        assert bob_t.sent == []
        assert membership.lookups == []
        assert not alice.closed
        assert alice_t.closed_with is None

    @pytest.mark.asyncio
    async def test_connection_usable_after_malformed_frame(self, relay, connect):
        alice, _ = connect(ALICE)
        _, bob_t = connect(BOB)

        await relay.handle_inbound(alice, "not json")
        await relay.handle_inbound(alice, typing_frame())

        assert [env["type"] for env in bob_t.envelopes] == ["typing"]


class TestHandlerRegistration:
    def test_rejects_server_only_type(self, relay):
        with pytest.raises(HandlerRegistrationError):
            relay.register_handler(EnvelopeType.NEW_MESSAGE, lambda c, e: None)

    def test_rejects_unknown_type(self, relay):
        with pytest.raises(HandlerRegistrationError):
            relay.register_handler("user_online", lambda c, e: None)

    @pytest.mark.asyncio
    async def test_custom_handler_replaces_default(self, relay, connect):
        seen = []

        async def handler(connection, envelope):
            seen.append((connection.principal.id, envelope.type))

        relay.register_handler("typing", handler)
        alice, _ = connect(ALICE)
        _, bob_t = connect(BOB)

        await relay.handle_inbound(alice, typing_frame())

        assert seen == [("alice", EnvelopeType.TYPING)]
        assert bob_t.sent == []
