"""
redis_store.py — CallStore shared by every server instance through Redis.

Why this exists:
- InMemoryCallStore lives inside one process; behind a load balancer the
  caller's initiate and the receiver's accept can land on different
  instances. Redis gives them one registry.

How it keeps the single-writer rule:
- Each call is one JSON string under "<prefix><call_id>".
- Ringing calls are written with a PX TTL equal to the ring timeout, so Redis
  expires them even if the instance that created them dies.
- Status changes and conditional deletes run as Lua scripts, which Redis
  executes atomically; two instances racing on one call can't both win.
  Accepting a call rewrites it without a TTL (accepted calls don't expire).
"""

import json
import logging
from typing import Any, Callable, List, Optional

import redis.asyncio as aioredis

from .calls import Call, CallStatus, CallStore
from .errors import ValidationError

logger = logging.getLogger(__name__)

DEFAULT_PREFIX = "parley:call:"

# KEYS[1] = call key, ARGV[1] = expected status, ARGV[2] = new status,
# ARGV[3] = JSON object of extra fields to merge.
_TRANSITION = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
local rec = cjson.decode(raw)
if rec['status'] ~= ARGV[1] then return false end
rec['status'] = ARGV[2]
for k, v in pairs(cjson.decode(ARGV[3])) do rec[k] = v end
local out = cjson.encode(rec)
redis.call('SET', KEYS[1], out)
return out
"""

# KEYS[1] = call key, ARGV[1] = required status ('' = any)
_REMOVE = """
local raw = redis.call('GET', KEYS[1])
if not raw then return false end
if ARGV[1] ~= '' then
  local rec = cjson.decode(raw)
  if rec['status'] ~= ARGV[1] then return false end
end
redis.call('DEL', KEYS[1])
return raw
"""


def _decode(raw: Any) -> Optional[Call]:
    if raw is None:
        return None
    if isinstance(raw, bytes):
        raw = raw.decode("utf-8")
    return Call.from_record(json.loads(raw))


class RedisCallStore(CallStore):

    def __init__(self, client: aioredis.Redis, prefix: str = DEFAULT_PREFIX) -> None:
        self.client = client
        self.prefix = prefix
        self._transition = client.register_script(_TRANSITION)
        self._remove = client.register_script(_REMOVE)

    @classmethod
    def from_url(cls, url: str, prefix: str = DEFAULT_PREFIX) -> "RedisCallStore":
        return cls(aioredis.from_url(url), prefix=prefix)

    def _key(self, call_id: str) -> str:
        return self.prefix + call_id

    async def insert(self, call: Call, ttl: Optional[float] = None) -> None:
        px = int(ttl * 1000) if ttl else None
        ok = await self.client.set(self._key(call.call_id), json.dumps(call.to_record()), nx=True, px=px)
        if not ok:
            raise ValidationError("Duplicate call id")

    async def get(self, call_id: str) -> Optional[Call]:
        return _decode(await self.client.get(self._key(call_id)))

    async def transition(self, call_id: str, expected: CallStatus,
                         new: CallStatus, **changes: Any) -> Optional[Call]:
        raw = await self._transition(
            keys=[self._key(call_id)],
            args=[expected.value, new.value, json.dumps(changes)],
        )
        return _decode(raw)

    async def remove(self, call_id: str) -> Optional[Call]:
        return _decode(await self._remove(keys=[self._key(call_id)], args=[""]))

    async def remove_if_status(self, call_id: str, status: CallStatus) -> Optional[Call]:
        return _decode(await self._remove(keys=[self._key(call_id)], args=[status.value]))

    async def find(self, predicate: Callable[[Call], bool]) -> List[Call]:
        keys = [k async for k in self.client.scan_iter(match=self.prefix + "*")]
        if not keys:
            return []
        out = []
        for raw in await self.client.mget(keys):
            # a key can expire between SCAN and MGET
            call = _decode(raw)
            if call is not None and predicate(call):
                out.append(call)
        return out

    async def clear(self) -> None:
        keys = [k async for k in self.client.scan_iter(match=self.prefix + "*")]
        if keys:
            await self.client.delete(*keys)

    async def close(self) -> None:
        await self.client.aclose()
