"""
calls.py — call records, the call store, and the signaling state machine.

Lifecycle of one call:

    initiate ──> RINGING ──accept──> ACCEPTED ──> (peers connect media P2P)
                    │                    │
                    ├─ reject ─> gone    └─ end ─> gone
                    ├─ end ────> gone
                    └─ 60s, nobody answered ─> gone

"Gone" means removed from the store: a call only exists while it is active,
and every terminal transition is just a delete. Whoever gets there first
wins; everyone after sees NotFoundError. Accept is a compare-and-set from
RINGING, so two racing accepts give one success and one not-found.

Expiry is enforced twice: a timer per ringing call (cancelled the moment the
call leaves RINGING) and a lazy check on every read, so a stale call is
never reported as ringing even if the timer lives in another process.

The store is injectable: InMemoryCallStore for a single process (and tests),
redis_store.RedisCallStore when several server instances share calls.
"""

import abc
import asyncio
import dataclasses
import enum
import logging
import secrets
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set

from .errors import AuthorizationError, NotFoundError, ValidationError
from .signals import SignalRelay

logger = logging.getLogger(__name__)

RING_TIMEOUT = 60.0


class CallType(str, enum.Enum):
    VIDEO = "video"
    AUDIO = "audio"

    @classmethod
    def parse(cls, value: Any) -> "CallType":
        try:
            return cls(value)
        except ValueError:
            raise ValidationError("Invalid call type") from None


class CallStatus(str, enum.Enum):
    RINGING = "ringing"
    ACCEPTED = "accepted"


def _iso(ts: float) -> str:
    ms = int(round(ts * 1000)) % 1000
    return time.strftime("%Y-%m-%dT%H:%M:%S", time.gmtime(ts)) + f".{ms:03d}Z"


def make_call_id(caller_id: str, receiver_id: str, now: float) -> str:
    """
    caller-receiver-millis-random. The random tail keeps two initiations
    from the same pair in the same millisecond apart.
    """
    return f"{caller_id}-{receiver_id}-{int(now * 1000)}-{secrets.token_hex(4)}"


@dataclasses.dataclass(frozen=True)
class Call:
    call_id: str
    caller_id: str
    receiver_id: str
    call_type: CallType
    status: CallStatus = CallStatus.RINGING
    created_at: float = dataclasses.field(default_factory=time.time)
    accepted_at: Optional[float] = None

    @property
    def participants(self) -> Set[str]:
        return {self.caller_id, self.receiver_id}

    def with_status(self, status: CallStatus, **changes: Any) -> "Call":
        return dataclasses.replace(self, status=status, **changes)

    def to_dict(self) -> Dict[str, Any]:
        """Wire shape used by the HTTP API."""
        out = {
            "callId": self.call_id,
            "callerId": self.caller_id,
            "receiverId": self.receiver_id,
            "callType": self.call_type.value,
            "status": self.status.value,
            "createdAt": _iso(self.created_at),
        }
        if self.accepted_at is not None:
            out["acceptedAt"] = _iso(self.accepted_at)
        return out

    def to_record(self) -> Dict[str, Any]:
        """Storage shape (exact floats, no formatting)."""
        return {
            "call_id": self.call_id,
            "caller_id": self.caller_id,
            "receiver_id": self.receiver_id,
            "call_type": self.call_type.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "accepted_at": self.accepted_at,
        }

    @classmethod
    def from_record(cls, rec: Dict[str, Any]) -> "Call":
        return cls(
            call_id=rec["call_id"],
            caller_id=rec["caller_id"],
            receiver_id=rec["receiver_id"],
            call_type=CallType(rec["call_type"]),
            status=CallStatus(rec["status"]),
            created_at=float(rec["created_at"]),
            accepted_at=rec.get("accepted_at"),
        )


# -----------------------
# Store interface + in-memory implementation
# -----------------------

class CallStore(abc.ABC):
    """
    Keyed store of active calls. Every method is atomic per call id; that is
    the only guarantee the coordinator relies on.
    """

    @abc.abstractmethod
    async def insert(self, call: Call, ttl: Optional[float] = None) -> None:
        """Add a new call. `ttl` is a hint for stores that can expire keys."""

    @abc.abstractmethod
    async def get(self, call_id: str) -> Optional[Call]:
        ...

    @abc.abstractmethod
    async def transition(self, call_id: str, expected: CallStatus,
                         new: CallStatus, **changes: Any) -> Optional[Call]:
        """Compare-and-set on status. None if missing or not in `expected`."""

    @abc.abstractmethod
    async def remove(self, call_id: str) -> Optional[Call]:
        """Delete and return the call, or None if it was already gone."""

    @abc.abstractmethod
    async def remove_if_status(self, call_id: str, status: CallStatus) -> Optional[Call]:
        ...

    @abc.abstractmethod
    async def find(self, predicate: Callable[[Call], bool]) -> List[Call]:
        ...

    @abc.abstractmethod
    async def clear(self) -> None:
        """Drop every call (tests and maintenance)."""

    async def close(self) -> None:
        return None


class InMemoryCallStore(CallStore):
    """Process-local dict. Not shared between server instances."""

    def __init__(self) -> None:
        self._calls: Dict[str, Call] = {}
        self._lock = threading.Lock()

    async def insert(self, call: Call, ttl: Optional[float] = None) -> None:
        with self._lock:
            if call.call_id in self._calls:
                raise ValidationError("Duplicate call id")
            self._calls[call.call_id] = call

    async def get(self, call_id: str) -> Optional[Call]:
        with self._lock:
            return self._calls.get(call_id)

    async def transition(self, call_id: str, expected: CallStatus,
                         new: CallStatus, **changes: Any) -> Optional[Call]:
        with self._lock:
            call = self._calls.get(call_id)
            if call is None or call.status != expected:
                return None
            updated = call.with_status(new, **changes)
            self._calls[call_id] = updated
            return updated

    async def remove(self, call_id: str) -> Optional[Call]:
        with self._lock:
            return self._calls.pop(call_id, None)

    async def remove_if_status(self, call_id: str, status: CallStatus) -> Optional[Call]:
        with self._lock:
            call = self._calls.get(call_id)
            if call is None or call.status != status:
                return None
            return self._calls.pop(call_id)

    async def find(self, predicate: Callable[[Call], bool]) -> List[Call]:
        with self._lock:
            snapshot = list(self._calls.values())
        return [c for c in snapshot if predicate(c)]

    async def clear(self) -> None:
        with self._lock:
            self._calls.clear()

    def __len__(self) -> int:
        return len(self._calls)


# -----------------------
# Coordinator (the state machine)
# -----------------------

class CallCoordinator:
    """
    Drives calls through ringing -> accepted -> gone. Performs no retries;
    every failure is a typed error for the caller to show or re-poll on.
    """

    def __init__(
        self,
        store: Optional[CallStore] = None,
        ring_timeout: float = RING_TIMEOUT,
        clock: Callable[[], float] = time.time,
        relay: Optional[SignalRelay] = None,
    ) -> None:
        self.store = store if store is not None else InMemoryCallStore()
        self.ring_timeout = ring_timeout
        self.clock = clock
        self.relay = relay if relay is not None else SignalRelay()
        self._timers: Dict[str, asyncio.TimerHandle] = {}
        self._tasks: Set["asyncio.Task[Any]"] = set()

    # ---- timers --------------------------------------------------------

    def _schedule_expiry(self, call_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._timers[call_id] = loop.call_later(self.ring_timeout, self._on_ring_timeout, call_id)

    def _cancel_timer(self, call_id: str) -> None:
        handle = self._timers.pop(call_id, None)
        if handle is not None:
            handle.cancel()

    def _on_ring_timeout(self, call_id: str) -> None:
        self._timers.pop(call_id, None)
        task = asyncio.ensure_future(self._expire(call_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _expire(self, call_id: str) -> bool:
        removed = await self.store.remove_if_status(call_id, CallStatus.RINGING)
        self._cancel_timer(call_id)
        if removed is not None:
            self.relay.discard(call_id)
            logger.info("Call %s expired unanswered", call_id)
            return True
        return False

    def _is_stale(self, call: Call) -> bool:
        return call.status == CallStatus.RINGING and call.created_at + self.ring_timeout <= self.clock()

    async def _live(self, call_id: str) -> Optional[Call]:
        """Read a call, expiring it on the spot if it rang out."""
        call = await self.store.get(call_id)
        if call is not None and self._is_stale(call):
            logger.debug("Lazy expiry of call %s", call_id)
            await self._expire(call_id)
            return None
        return call

    # ---- operations ----------------------------------------------------

    async def initiate(self, caller_id: str, receiver_id: str, call_type: Any) -> Call:
        if not caller_id or not receiver_id or not call_type:
            raise ValidationError("Missing required fields")
        if not isinstance(receiver_id, str):
            raise ValidationError("otherUserId must be a string")
        kind = CallType.parse(call_type)
        if caller_id == receiver_id:
            raise ValidationError("Cannot call yourself")

        now = self.clock()
        call = Call(
            call_id=make_call_id(caller_id, receiver_id, now),
            caller_id=caller_id,
            receiver_id=receiver_id,
            call_type=kind,
            created_at=now,
        )
        await self.store.insert(call, ttl=self.ring_timeout)
        self._schedule_expiry(call.call_id)
        logger.info("Call %s initiated (%s) %s -> %s", call.call_id, kind.value, caller_id, receiver_id)
        return call

    async def accept(self, call_id: str, accepting_user_id: str) -> Call:
        if not call_id:
            raise ValidationError("Call ID required")
        call = await self._live(call_id)
        if call is None or call.status != CallStatus.RINGING:
            raise NotFoundError("Call not found or expired")
        if call.receiver_id != accepting_user_id:
            raise AuthorizationError("Unauthorized")

        accepted = await self.store.transition(
            call_id, CallStatus.RINGING, CallStatus.ACCEPTED, accepted_at=self.clock()
        )
        if accepted is None:
            # someone else (reject/end/expiry/another accept) got there first
            raise NotFoundError("Call not found or expired")
        self._cancel_timer(call_id)
        logger.info("Call %s accepted by %s", call_id, accepting_user_id)
        return accepted

    async def _terminate(self, call_id: str, user_id: Optional[str], verb: str) -> None:
        call = await self._live(call_id)
        if call is None:
            return
        if user_id is not None and user_id not in call.participants:
            raise AuthorizationError("Not a participant in this call")
        removed = await self.store.remove(call_id)
        self._cancel_timer(call_id)
        self.relay.discard(call_id)
        if removed is not None:
            logger.info("Call %s %s by %s", call_id, verb, user_id or "system")

    async def reject(self, call_id: str, user_id: Optional[str] = None) -> None:
        """Idempotent; rejecting a call that is already gone is fine."""
        if not call_id:
            raise ValidationError("Call ID required")
        await self._terminate(call_id, user_id, "rejected")

    async def end(self, call_id: Optional[str], user_id: Optional[str] = None) -> None:
        """Idempotent; ending without an id or after the fact is a no-op."""
        if not call_id:
            return
        await self._terminate(call_id, user_id, "ended")

    async def list_incoming(self, user_id: str) -> List[Call]:
        ringing = await self.store.find(
            lambda c: c.receiver_id == user_id and c.status == CallStatus.RINGING
        )
        live = []
        for call in ringing:
            if self._is_stale(call):
                await self._expire(call.call_id)
            else:
                live.append(call)
        live.sort(key=lambda c: c.created_at)
        return live

    async def get_status(self, call_id: str, user_id: Optional[str] = None) -> Call:
        call = await self._live(call_id)
        if call is None:
            raise NotFoundError("Call not found")
        if user_id is not None and user_id not in call.participants:
            raise AuthorizationError("Not a participant in this call")
        return call

    # ---- signaling relay ------------------------------------------------

    async def relay_signal(self, call_id: str, sender: str, kind: str,
                           body: Optional[Dict[str, Any]] = None,
                           msg_id: Optional[str] = None) -> Optional[Dict[str, Any]]:
        if not call_id:
            raise ValidationError("Call ID required")
        call = await self._live(call_id)
        if call is None:
            raise NotFoundError("Call not found")
        return self.relay.post(call, sender, kind, body, msg_id)

    async def drain_signals(self, call_id: str, user_id: str) -> List[Dict[str, Any]]:
        call = await self.get_status(call_id, user_id)
        return self.relay.drain(call.call_id, user_id)

    # ---- shutdown ---------------------------------------------------------

    async def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
