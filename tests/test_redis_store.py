# RedisCallStore, including its Lua compare-and-set scripts. Runs on an
# in-process fakeredis server by default; set PARLEY_TEST_REDIS_URL to run
# the same tests against a real Redis instead (keys use a throwaway prefix
# and are cleared afterwards).

import asyncio
import os
import uuid

import fakeredis
import pytest

from parley.calls import Call, CallCoordinator, CallStatus, CallType
from parley.errors import NotFoundError, ValidationError
from parley.redis_store import RedisCallStore

REDIS_URL = os.environ.get("PARLEY_TEST_REDIS_URL")


@pytest.fixture
async def store():
    prefix = f"parley-test:{uuid.uuid4().hex}:"
    if REDIS_URL:
        s = RedisCallStore.from_url(REDIS_URL, prefix=prefix)
    else:
        s = RedisCallStore(fakeredis.FakeAsyncRedis(), prefix=prefix)
    yield s
    await s.clear()
    await s.close()


def _call(call_id="c1", created_at=1000.0):
    return Call(call_id, "alice", "bob", CallType.VIDEO, created_at=created_at)


async def test_insert_get(store):
    await store.insert(_call())
    got = await store.get("c1")
    assert got == _call()
    assert await store.get("missing") is None


async def test_duplicate_insert(store):
    await store.insert(_call())
    with pytest.raises(ValidationError):
        await store.insert(_call())


async def test_transition_is_compare_and_set(store):
    await store.insert(_call())
    accepted = await store.transition("c1", CallStatus.RINGING, CallStatus.ACCEPTED, accepted_at=1005.0)
    assert accepted.status is CallStatus.ACCEPTED
    assert accepted.accepted_at == 1005.0
    assert await store.transition("c1", CallStatus.RINGING, CallStatus.ACCEPTED) is None
    assert (await store.get("c1")).status is CallStatus.ACCEPTED


async def test_conditional_remove(store):
    await store.insert(_call())
    await store.transition("c1", CallStatus.RINGING, CallStatus.ACCEPTED)
    assert await store.remove_if_status("c1", CallStatus.RINGING) is None
    assert await store.remove("c1") is not None
    assert await store.remove("c1") is None


async def test_ttl_expires_ringing_calls(store):
    await store.insert(_call(), ttl=0.1)
    await asyncio.sleep(0.3)
    assert await store.get("c1") is None


async def test_accepting_drops_the_ttl(store):
    await store.insert(_call(), ttl=0.2)
    await store.transition("c1", CallStatus.RINGING, CallStatus.ACCEPTED)
    await asyncio.sleep(0.4)
    assert await store.get("c1") is not None


async def test_find(store):
    await store.insert(_call("c1"))
    await store.insert(Call("c2", "carol", "dave", CallType.AUDIO, created_at=1.0))
    found = await store.find(lambda c: c.receiver_id == "bob")
    assert [c.call_id for c in found] == ["c1"]


async def test_two_coordinators_share_calls(store):
    # two server instances behind one Redis
    a = CallCoordinator(store)
    b = CallCoordinator(store)
    try:
        call = await a.initiate("alice", "bob", "video")
        assert [c.call_id for c in await b.list_incoming("bob")] == [call.call_id]
        results = await asyncio.gather(
            a.accept(call.call_id, "bob"),
            b.accept(call.call_id, "bob"),
            return_exceptions=True,
        )
        assert sum(isinstance(r, Call) for r in results) == 1
        assert sum(isinstance(r, NotFoundError) for r in results) == 1
    finally:
        await a.close()
        await b.close()
