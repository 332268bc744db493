# Tests for the call state machine.
#
# Coverage:
#   - ringing -> accepted -> gone, and reject/end from either side
#   - input validation and participant checks (state left untouched)
#   - 60s expiry, both lazily on read and by the per-call timer
#   - racing accepts resolve to exactly one winner
#   - signal relay tied to the call's lifetime

import asyncio

import pytest

from parley.calls import (
    Call,
    CallCoordinator,
    CallStatus,
    CallType,
    InMemoryCallStore,
    make_call_id,
)
from parley.errors import AuthorizationError, NotFoundError, ValidationError
from parley.signals import ICE_CANDIDATE, OFFER


class TestLifecycle:

    async def test_ring_accept_end(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        assert call.status is CallStatus.RINGING
        assert call.call_id.startswith("alice-bob-")

        incoming = await coordinator.list_incoming("bob")
        assert [c.call_id for c in incoming] == [call.call_id]
        assert await coordinator.list_incoming("alice") == []

        accepted = await coordinator.accept(call.call_id, "bob")
        assert accepted.status is CallStatus.ACCEPTED
        assert accepted.accepted_at is not None
        assert await coordinator.list_incoming("bob") == []
        assert (await coordinator.get_status(call.call_id)).status is CallStatus.ACCEPTED

        await coordinator.end(call.call_id, "alice")
        with pytest.raises(NotFoundError):
            await coordinator.get_status(call.call_id)

    async def test_reject_removes_and_is_idempotent(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "audio")
        await coordinator.reject(call.call_id, "bob")
        with pytest.raises(NotFoundError):
            await coordinator.get_status(call.call_id)
        await coordinator.reject(call.call_id, "bob")

    async def test_caller_can_cancel_while_ringing(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "audio")
        await coordinator.end(call.call_id, "alice")
        with pytest.raises(NotFoundError):
            await coordinator.accept(call.call_id, "bob")

    async def test_end_is_idempotent(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        await coordinator.accept(call.call_id, "bob")
        await coordinator.end(call.call_id, "bob")
        await coordinator.end(call.call_id, "bob")
        await coordinator.end(None, "bob")
        await coordinator.end("", "bob")

    async def test_accept_after_end(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        await coordinator.accept(call.call_id, "bob")
        await coordinator.end(call.call_id, "alice")
        with pytest.raises(NotFoundError):
            await coordinator.accept(call.call_id, "bob")

    async def test_accept_twice(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        await coordinator.accept(call.call_id, "bob")
        with pytest.raises(NotFoundError):
            await coordinator.accept(call.call_id, "bob")

    async def test_incoming_is_oldest_first(self, coordinator, clock):
        first = await coordinator.initiate("alice", "bob", "video")
        clock.advance(1)
        second = await coordinator.initiate("carol", "bob", "audio")
        assert [c.call_id for c in await coordinator.list_incoming("bob")] == [first.call_id, second.call_id]

    async def test_same_millisecond_ids_differ(self, coordinator):
        a = await coordinator.initiate("alice", "bob", "video")
        b = await coordinator.initiate("alice", "bob", "video")
        assert a.call_id != b.call_id
        assert len(await coordinator.list_incoming("bob")) == 2


class TestValidation:

    @pytest.mark.parametrize("caller,receiver,kind", [
        ("alice", None, "video"),
        ("alice", "", "video"),
        ("alice", "bob", None),
        ("", "bob", "video"),
    ])
    async def test_missing_fields(self, coordinator, caller, receiver, kind):
        with pytest.raises(ValidationError, match="Missing required fields"):
            await coordinator.initiate(caller, receiver, kind)

    async def test_invalid_type_creates_nothing(self, coordinator):
        with pytest.raises(ValidationError, match="Invalid call type"):
            await coordinator.initiate("alice", "bob", "hologram")
        assert len(coordinator.store) == 0

    async def test_cannot_call_yourself(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.initiate("alice", "alice", "video")

    async def test_receiver_must_be_a_string(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.initiate("alice", ["bob"], "video")

    async def test_only_receiver_may_accept(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        for intruder in ("carol", "alice"):
            with pytest.raises(AuthorizationError):
                await coordinator.accept(call.call_id, intruder)
        assert (await coordinator.get_status(call.call_id)).status is CallStatus.RINGING

    async def test_outsider_cannot_end_or_reject(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        with pytest.raises(AuthorizationError):
            await coordinator.end(call.call_id, "mallory")
        with pytest.raises(AuthorizationError):
            await coordinator.reject(call.call_id, "mallory")
        assert await coordinator.get_status(call.call_id)

    async def test_outsider_cannot_read_status(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        with pytest.raises(AuthorizationError):
            await coordinator.get_status(call.call_id, "mallory")

    async def test_missing_ids(self, coordinator):
        with pytest.raises(ValidationError):
            await coordinator.accept("", "bob")
        with pytest.raises(ValidationError):
            await coordinator.reject(None, "bob")

    async def test_unknown_call(self, coordinator):
        with pytest.raises(NotFoundError, match="Call not found or expired"):
            await coordinator.accept("nope", "bob")
        with pytest.raises(NotFoundError):
            await coordinator.get_status("nope")


class TestExpiry:

    async def test_lazy_expiry_after_timeout(self, coordinator, clock):
        call = await coordinator.initiate("alice", "bob", "video")
        clock.advance(59.9)
        assert await coordinator.list_incoming("bob")
        clock.advance(0.2)
        assert await coordinator.list_incoming("bob") == []
        with pytest.raises(NotFoundError):
            await coordinator.accept(call.call_id, "bob")
        assert len(coordinator.store) == 0

    async def test_status_of_expired_call(self, coordinator, clock):
        call = await coordinator.initiate("alice", "bob", "video")
        clock.advance(61)
        with pytest.raises(NotFoundError):
            await coordinator.get_status(call.call_id)

    async def test_ending_a_rung_out_call_is_a_no_op_for_anyone(self, coordinator, clock):
        call = await coordinator.initiate("alice", "bob", "video")
        clock.advance(61)
        await coordinator.end(call.call_id, "mallory")
        await coordinator.reject(call.call_id, "mallory")
        assert len(coordinator.store) == 0

    async def test_accepted_calls_do_not_expire(self, coordinator, clock):
        call = await coordinator.initiate("alice", "bob", "video")
        await coordinator.accept(call.call_id, "bob")
        clock.advance(3600)
        assert (await coordinator.get_status(call.call_id)).status is CallStatus.ACCEPTED

    async def test_timer_removes_unanswered_call(self):
        c = CallCoordinator(ring_timeout=0.05)
        try:
            await c.initiate("alice", "bob", "video")
            assert len(c.store) == 1
            await asyncio.sleep(0.2)
            assert len(c.store) == 0
            assert c._timers == {}
        finally:
            await c.close()

    async def test_timer_cancelled_on_accept(self):
        c = CallCoordinator(ring_timeout=0.05)
        try:
            call = await c.initiate("alice", "bob", "video")
            await c.accept(call.call_id, "bob")
            assert c._timers == {}
            await asyncio.sleep(0.2)
            assert (await c.get_status(call.call_id)).status is CallStatus.ACCEPTED
        finally:
            await c.close()

    async def test_timer_cancelled_on_reject(self):
        c = CallCoordinator(ring_timeout=10)
        try:
            call = await c.initiate("alice", "bob", "video")
            await c.reject(call.call_id, "bob")
            assert c._timers == {}
        finally:
            await c.close()

    async def test_close_cancels_pending_timers(self):
        c = CallCoordinator(ring_timeout=10)
        await c.initiate("alice", "bob", "video")
        await c.close()
        assert c._timers == {}


class TestRaces:

    async def test_concurrent_accepts_one_winner(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        results = await asyncio.gather(
            coordinator.accept(call.call_id, "bob"),
            coordinator.accept(call.call_id, "bob"),
            return_exceptions=True,
        )
        winners = [r for r in results if isinstance(r, Call)]
        losers = [r for r in results if isinstance(r, NotFoundError)]
        assert len(winners) == 1 and len(losers) == 1

    async def test_compare_and_set_rejects_stale_status(self):
        store = InMemoryCallStore()
        call = Call("c1", "alice", "bob", CallType.VIDEO, created_at=0.0)
        await store.insert(call)
        assert await store.transition("c1", CallStatus.RINGING, CallStatus.ACCEPTED) is not None
        assert await store.transition("c1", CallStatus.RINGING, CallStatus.ACCEPTED) is None
        assert await store.remove_if_status("c1", CallStatus.RINGING) is None
        assert await store.remove("c1") is not None
        assert await store.remove("c1") is None

    async def test_duplicate_insert(self):
        store = InMemoryCallStore()
        call = Call("c1", "alice", "bob", CallType.VIDEO, created_at=0.0)
        await store.insert(call)
        with pytest.raises(ValidationError):
            await store.insert(call)

    async def test_clear(self):
        store = InMemoryCallStore()
        await store.insert(Call("c1", "alice", "bob", CallType.VIDEO, created_at=0.0))
        await store.clear()
        assert len(store) == 0


class TestSignals:

    async def test_candidates_reach_the_other_peer(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        await coordinator.relay_signal(call.call_id, "alice", OFFER, {"type": "offer", "sdp": "v=0"})
        await coordinator.relay_signal(call.call_id, "alice", ICE_CANDIDATE, {"candidate": "c1"})
        got = await coordinator.drain_signals(call.call_id, "bob")
        assert [s["type"] for s in got] == [OFFER, ICE_CANDIDATE]
        assert await coordinator.drain_signals(call.call_id, "alice") == []

    async def test_no_signals_for_unknown_call(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.relay_signal("nope", "alice", ICE_CANDIDATE, {"candidate": "c"})

    async def test_msg_id_must_be_a_string(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        with pytest.raises(ValidationError):
            await coordinator.relay_signal(call.call_id, "alice", ICE_CANDIDATE, {"candidate": "c"}, {"x": 1})
        assert coordinator.relay.pending(call.call_id, "bob") == 0

    async def test_ending_discards_queued_signals(self, coordinator):
        call = await coordinator.initiate("alice", "bob", "video")
        await coordinator.relay_signal(call.call_id, "alice", ICE_CANDIDATE, {"candidate": "c1"})
        await coordinator.end(call.call_id, "alice")
        assert coordinator.relay.pending(call.call_id, "bob") == 0


class TestWireShape:

    def test_to_dict(self):
        call = Call("alice-bob-1", "alice", "bob", CallType.AUDIO, created_at=0.5)
        assert call.to_dict() == {
            "callId": "alice-bob-1",
            "callerId": "alice",
            "receiverId": "bob",
            "callType": "audio",
            "status": "ringing",
            "createdAt": "1970-01-01T00:00:00.500Z",
        }

    def test_record_round_trip(self):
        call = Call("x", "alice", "bob", CallType.VIDEO, CallStatus.ACCEPTED, 12.5, 20.0)
        assert Call.from_record(call.to_record()) == call

    def test_call_id_format(self):
        parts = make_call_id("alice", "bob", 1.234).split("-")
        assert parts[:3] == ["alice", "bob", "1234"]
        assert len(parts[3]) == 8

    def test_parse_type(self):
        assert CallType.parse("video") is CallType.VIDEO
        with pytest.raises(ValidationError):
            CallType.parse("fax")
